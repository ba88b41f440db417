"""
main.py

FastAPI entry point for the receipt batch extractor.

POST /api/extract-receipts
    multipart/form-data body, repeated "files" field (up to MAX_FILES_PER_BATCH).
    Returns { "csv": "<header>\\n<row>...", "errors": [{filename, error}] }.
    ?format=csv or ?format=xlsx returns the same table as a download.

Request flow:
    AI client configured? → boundary → body → MultipartIngestor → BatchPolicy
    → BatchScheduler (windowed Gemini calls) → CsvReconciler → response.

Every error response is { "error": "<message>" }.

For local dev only, python main.py still works. In production run uvicorn
(or gunicorn with UvicornWorker) against main:app.
"""

import logging
import os
import sys
from contextlib import asynccontextmanager
from typing import Optional

# Ensure src/ is on the path so all module imports resolve
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "src"))

from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.exceptions import HTTPException as StarletteHTTPException

from ai_extractor import ConfigurationError, ExtractionClient
from batch_policy import BatchPolicy, PolicyViolation
from batch_processor import BatchScheduler, summarize_failures
from config import (
    ALLOWED_ORIGINS,
    EXTRACTION_PROFILE,
    FLAG_DUPLICATES,
    GEMINI_API_KEY,
    UPLOAD_RATE_LIMIT,
)
from csv_reconciler import merge
from excel_writer import build_excel, get_output_filename
from multipart_ingestor import (
    EmptyBatchError,
    MalformedUploadError,
    boundary_from_content_type,
    parse,
)
from prompts import ExtractionProfile, get_profile


# ── Logging ────────────────────────────────────────────────────────────────────

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# ── Startup configuration ──────────────────────────────────────────────────────
# Profile and policy are chosen once per process, not per request.

_PROFILE = get_profile(EXTRACTION_PROFILE, FLAG_DUPLICATES)
_POLICY = BatchPolicy()

_XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
_OUTPUT_FORMATS = ("json", "csv", "xlsx")


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


async def _read_body(request: Request, policy: BatchPolicy) -> bytes:
    """
    Buffer the request body, giving up as soon as it outgrows what a batch
    within the policy limits could need.

    Raises:
        PolicyViolation: Content-Length or the streamed size is over the limit.
    """
    limit = policy.max_request_bytes
    declared = request.headers.get("content-length", "")
    if declared.isdigit() and int(declared) > limit:
        raise policy.request_too_large()

    chunks: list[bytes] = []
    received = 0
    async for chunk in request.stream():
        received += len(chunk)
        if received > limit:
            raise policy.request_too_large()
        chunks.append(chunk)
    return b"".join(chunks)


# ── Rate Limiter ───────────────────────────────────────────────────────────────

_limiter = Limiter(key_func=get_remote_address)


def _rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    return _error(429, f"Rate limit exceeded. {exc.detail}")


def _http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


# ── Dependencies ───────────────────────────────────────────────────────────────

def get_extraction_client(request: Request) -> Optional[ExtractionClient]:
    return getattr(request.app.state, "extraction_client", None)


def get_extraction_profile() -> ExtractionProfile:
    return _PROFILE


def get_batch_policy() -> BatchPolicy:
    return _POLICY


def get_batch_scheduler(
    client: Optional[ExtractionClient] = Depends(get_extraction_client),
    profile: ExtractionProfile = Depends(get_extraction_profile),
    policy: BatchPolicy = Depends(get_batch_policy),
) -> Optional[BatchScheduler]:
    if client is None:
        return None
    return BatchScheduler(client, profile, policy)


# ── App lifecycle ──────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.extraction_client = None
    try:
        app.state.extraction_client = ExtractionClient(GEMINI_API_KEY)
    except ConfigurationError:
        logger.warning(
            "GEMINI_API_KEY is not set. Extraction requests will be refused "
            "with 500 until it is configured."
        )
    logger.info(f"Receipt extractor API started (profile '{_PROFILE.name}').")
    yield
    if app.state.extraction_client is not None:
        await app.state.extraction_client.aclose()
    logger.info("Receipt extractor API shutting down.")


# ── App setup ─────────────────────────────────────────────────────────────────

app = FastAPI(
    title="Receipt Data Extractor",
    description="Turns batches of receipt images and PDFs into one CSV table using Gemini.",
    version="1.0.0",
    lifespan=lifespan,
)

app.state.limiter = _limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_handler)
app.add_exception_handler(StarletteHTTPException, _http_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Routes ─────────────────────────────────────────────────────────────────────

@app.get("/health", include_in_schema=False)
@app.get("/api/health", include_in_schema=False)
async def health_check():
    """Liveness probe."""
    return {"status": "OK"}


@app.options("/api/extract-receipts", include_in_schema=False)
async def extract_receipts_preflight():
    return Response(status_code=200)


@app.post("/api/extract-receipts")
@_limiter.limit(UPLOAD_RATE_LIMIT)
async def extract_receipts(
    request: Request,
    output: str = Query("json", alias="format"),
    scheduler: Optional[BatchScheduler] = Depends(get_batch_scheduler),
    profile: ExtractionProfile = Depends(get_extraction_profile),
    policy: BatchPolicy = Depends(get_batch_policy),
):
    """
    Extract every uploaded receipt and return one combined table.
    A file that fails never loses its siblings' rows; it is listed in "errors".
    """
    # Fail fast: nothing is read from the body without a configured AI client.
    if scheduler is None:
        logger.error("Extraction requested but GEMINI_API_KEY is not configured.")
        return _error(500, "API key not configured")

    if output not in _OUTPUT_FORMATS:
        return _error(400, f"Unsupported format '{output}'. Use one of: {', '.join(_OUTPUT_FORMATS)}.")

    try:
        boundary = boundary_from_content_type(request.headers.get("content-type"))
        raw_body = await _read_body(request, policy)
        files = parse(raw_body, boundary)
        policy.validate_batch(files)
    except (MalformedUploadError, EmptyBatchError, PolicyViolation) as exc:
        logger.warning(f"Upload rejected: {exc}")
        return _error(400, str(exc))

    logger.info(f"Processing {len(files)} file(s).")

    try:
        outcomes = await scheduler.run(files)
    except ConfigurationError as exc:
        return _error(500, str(exc))

    table = merge(outcomes, profile)

    if not table.rows:
        batch_failure = summarize_failures(outcomes)
        if batch_failure is not None:
            logger.warning(f"Whole batch failed upstream: HTTP {batch_failure.status_code}.")
            return _error(batch_failure.status_code, batch_failure.message)

    if output == "csv":
        filename = get_output_filename("csv")
        return Response(
            content=table.to_csv(),
            media_type="text/csv; charset=utf-8",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    if output == "xlsx":
        excel_bytes = build_excel(table)
        filename = get_output_filename("xlsx")
        return Response(
            content=excel_bytes,
            media_type=_XLSX_MEDIA_TYPE,
            headers={
                "Content-Disposition": f'attachment; filename="{filename}"',
                "Content-Length": str(len(excel_bytes)),
            },
        )

    logger.info("Extraction completed successfully.")
    return {
        "csv": table.to_csv(),
        "errors": [err.to_dict() for err in table.errors],
    }


# ── Entry point ────────────────────────────────────────────────────────────────
# This block is for local dev only: python main.py

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "3001")),
        reload=False,
        log_level="info",
    )
