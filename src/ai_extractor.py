"""
ai_extractor.py

Async Gemini extraction layer.

One call per uploaded file: the fixed instruction prompt and the file itself
(base64, sent as inline_data with its mime type) go out in a single
generateContent request. The reply text is returned untouched; turning it into
table rows is csv_reconciler's job.

All calls are async and share one httpx.AsyncClient. No retry and no explicit
per-call timeout beyond the transport defaults: a failed call surfaces as
TransportError and the scheduler records it against that file only.

Public API:
    ExtractionClient(api_key, ...)
        await client.extract(file_record, prompt) → str
        await client.aclose()
"""

import base64
import logging
from typing import Optional

import httpx

from config import (
    AI_MAX_OUTPUT_TOKENS,
    AI_TEMPERATURE,
    GEMINI_BASE_URL,
    GEMINI_MODEL,
)
from multipart_ingestor import FileRecord

logger = logging.getLogger(__name__)


# ── Errors ─────────────────────────────────────────────────────────────────────

class ConfigurationError(RuntimeError):
    """The AI backend cannot be used (missing credential)."""


class ExtractionError(Exception):
    """Base class for a failed extraction call."""


class TransportError(ExtractionError):
    """Gemini answered with a non-success status, or the request never completed."""

    def __init__(self, status_code: Optional[int], detail: str = ""):
        self.status_code = status_code
        self.detail = detail
        label = f"HTTP {status_code}" if status_code is not None else "network error"
        super().__init__(f"Gemini request failed ({label}): {detail}".rstrip(": "))

    @property
    def is_rate_limited(self) -> bool:
        return self.status_code == 429

    @property
    def is_quota_exhausted(self) -> bool:
        return self.status_code == 402


class EmptyResponseError(ExtractionError):
    """Gemini answered 200 but returned no text."""


# ── Client ─────────────────────────────────────────────────────────────────────

class ExtractionClient:
    """
    Thin wrapper over Gemini's generateContent endpoint.

    Built once at startup with explicit configuration. An empty api_key raises
    ConfigurationError immediately; there is no fallback credential.
    """

    def __init__(
        self,
        api_key: str,
        model: str = GEMINI_MODEL,
        base_url: str = GEMINI_BASE_URL,
        temperature: float = AI_TEMPERATURE,
        max_output_tokens: int = AI_MAX_OUTPUT_TOKENS,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        if not api_key:
            raise ConfigurationError("API key not configured")

        self.model = model
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens

        # Key travels in a header so it never shows up in logged URLs.
        self._http_client = http_client or httpx.AsyncClient(
            base_url=base_url,
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
        )
        self._headers = {
            "x-goog-api-key": api_key,
            "Content-Type": "application/json",
        }

    def _build_payload(self, record: FileRecord, prompt: str) -> dict:
        encoded = base64.b64encode(record.data).decode("ascii")
        return {
            "contents": [{
                "parts": [
                    {"text": prompt},
                    {"inline_data": {"mime_type": record.mime_type, "data": encoded}},
                ],
            }],
            "generationConfig": {
                "temperature": self.temperature,
                "maxOutputTokens": self.max_output_tokens,
            },
        }

    @staticmethod
    def _response_text(data: dict) -> str:
        candidates = data.get("candidates") or []
        if not candidates:
            return ""
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(part.get("text", "") for part in parts)

    async def extract(self, record: FileRecord, prompt: str) -> str:
        """
        Send one file to Gemini and return the raw reply text.

        Raises:
            TransportError:     non-2xx status or network failure.
            EmptyResponseError: the reply carries no text.
        """
        payload = self._build_payload(record, prompt)
        url = f"/v1beta/models/{self.model}:generateContent"

        try:
            response = await self._http_client.post(url, json=payload, headers=self._headers)
        except httpx.RequestError as exc:
            logger.error(f"[{record.name}] Gemini request error: {exc}")
            raise TransportError(None, str(exc)) from exc

        if response.is_error:
            logger.error(
                f"[{record.name}] Gemini API error {response.status_code}: "
                f"{response.text[:500]}"
            )
            raise TransportError(response.status_code, response.reason_phrase)

        text = self._response_text(response.json())
        if not text.strip():
            raise EmptyResponseError(f"Gemini returned no text for '{record.name}'")

        logger.info(f"[{record.name}] Gemini reply: {len(text)} chars.")
        return text

    async def aclose(self) -> None:
        await self._http_client.aclose()
