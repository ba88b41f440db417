import os
from dotenv import load_dotenv

load_dotenv()

ENV = os.getenv("ENV", "dev")
if ENV not in ("dev", "production"):
    raise ValueError(f"Invalid ENV value: '{ENV}'. Must be 'dev' or 'production'.")

# ── Gemini ─────────────────────────────────────────────────────────────────────
# No fallback key. When GEMINI_API_KEY is empty the app still starts, but every
# extraction request is refused with 500 "API key not configured" before any
# uploaded file is read.
GEMINI_API_KEY: str  = os.getenv("GEMINI_API_KEY", "")
GEMINI_MODEL: str    = os.getenv("GEMINI_MODEL", "gemini-2.0-flash-exp")
GEMINI_BASE_URL: str = os.getenv(
    "GEMINI_BASE_URL", "https://generativelanguage.googleapis.com"
)

# Low temperature keeps the CSV layout stable across calls.
AI_TEMPERATURE: float     = float(os.getenv("AI_TEMPERATURE", "0.1"))
AI_MAX_OUTPUT_TOKENS: int = int(os.getenv("AI_MAX_OUTPUT_TOKENS", "2048"))

# ── Extraction profile ─────────────────────────────────────────────────────────
# Selects the CSV schema + prompt pair from prompts.PROFILES.
#   invoice         → Invoice Number,Date,Amount,Currency,Merchant,Transaction Type
#   receipt_detail  → source_filename,is_receipt,total_amount,... (14 columns)
EXTRACTION_PROFILE: str = os.getenv("EXTRACTION_PROFILE", "invoice")

# Overrides the profile's duplicate-flag setting when set explicitly.
_flag_duplicates = os.getenv("FLAG_DUPLICATES")
FLAG_DUPLICATES = None if _flag_duplicates is None else _flag_duplicates.lower() == "true"

# ── Batch limits ───────────────────────────────────────────────────────────────
# MAX_FILE_SIZE_BYTES is the per-file ceiling enforced per file (the file fails,
# its siblings proceed). MAX_UPLOAD_FILE_SIZE_MB is the transport ceiling: a
# file above it rejects the whole request, like an upload middleware limit.
MAX_FILES_PER_BATCH: int     = int(os.getenv("MAX_FILES_PER_BATCH", "30"))
MAX_FILE_SIZE_BYTES: int     = int(os.getenv("MAX_FILE_SIZE_BYTES", str(1024 * 1024)))
MAX_UPLOAD_FILE_BYTES: int   = int(os.getenv("MAX_UPLOAD_FILE_SIZE_MB", "5")) * 1024 * 1024

ACCEPTED_MIME_TYPES = frozenset({
    "image/jpeg",
    "image/png",
    "image/webp",
    "image/heic",
    "image/heif",
    "application/pdf",
})

# ── Concurrency ────────────────────────────────────────────────────────────────
# Files are sent to Gemini in windows of BATCH_WINDOW_SIZE concurrent calls.
# After each window completes the scheduler waits BATCH_WINDOW_DELAY_SECONDS
# before the next one, which keeps a 30-file batch under the free-tier RPM cap.
BATCH_WINDOW_SIZE: int            = int(os.getenv("BATCH_WINDOW_SIZE", "5"))
BATCH_WINDOW_DELAY_SECONDS: float = float(os.getenv("BATCH_WINDOW_DELAY_SECONDS", "1.0"))

if BATCH_WINDOW_SIZE < 1:
    raise ValueError(f"BATCH_WINDOW_SIZE must be >= 1, got {BATCH_WINDOW_SIZE}.")

# ── HTTP ───────────────────────────────────────────────────────────────────────
# Example: ALLOWED_ORIGINS=https://yourapp.com,https://admin.yourapp.com
ALLOWED_ORIGINS = [o.strip() for o in os.getenv("ALLOWED_ORIGINS", "*").split(",")]

# slowapi limit string applied per client IP to the upload route.
UPLOAD_RATE_LIMIT: str = os.getenv("UPLOAD_RATE_LIMIT", "20/minute")
