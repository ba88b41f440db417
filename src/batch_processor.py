"""
batch_processor.py

Async orchestration of one receipt batch.

Per-file routing:
    A. Policy violation (too large, unsupported type)
                    → FAILED with the policy message. Gemini never called.
    B. Gemini call  → DONE with the raw CSV fragment.
                      Empty reply counts as DONE with an empty fragment
                      (the file contributes zero rows, the batch continues).
    C. Gemini error → FAILED "Failed to process with AI" (status kept so the
                      caller can tell rate limits and quota exhaustion apart).
    D. Anything else → FAILED with the exception text.

Concurrency model:
    Files are split into windows of window_size. The files of one window are
    sent concurrently with asyncio.gather and awaited together; the scheduler
    then sleeps window_delay seconds before starting the next window. There is
    no sleep after the last window.

    Every per-file coroutine catches its own errors, so one file can never
    cancel or delay its siblings. Outcomes are collected only after each
    window's gather returns, in submission order, so nothing shared is written
    concurrently.

Public API:
    BatchScheduler(client, profile, ...).run(files) → list[ExtractionOutcome]
    summarize_failures(outcomes)                  → Optional[BatchFailure]
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Sequence

from ai_extractor import ConfigurationError, EmptyResponseError, TransportError
from batch_policy import BatchPolicy
from config import BATCH_WINDOW_DELAY_SECONDS, BATCH_WINDOW_SIZE
from multipart_ingestor import FileRecord
from prompts import ExtractionProfile

logger = logging.getLogger(__name__)

# ── Outcome status constants ───────────────────────────────────────────────────

STATUS_DONE   = "done"
STATUS_FAILED = "failed"

AI_FAILURE_MESSAGE = "Failed to process with AI"


# ── Data structures ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ExtractionOutcome:
    filename: str
    status: str
    csv_fragment: str = ""
    error: Optional[str] = None
    status_code: Optional[int] = None

    @property
    def succeeded(self) -> bool:
        return self.status == STATUS_DONE

    @classmethod
    def success(cls, filename: str, csv_fragment: str) -> "ExtractionOutcome":
        return cls(filename=filename, status=STATUS_DONE, csv_fragment=csv_fragment)

    @classmethod
    def failure(
        cls,
        filename: str,
        error: str,
        status_code: Optional[int] = None,
    ) -> "ExtractionOutcome":
        return cls(filename=filename, status=STATUS_FAILED, error=error, status_code=status_code)


@dataclass(frozen=True)
class BatchFailure:
    """Every file failed for the same upstream reason."""
    status_code: int
    message: str


_BATCH_FAILURE_MESSAGES = {
    429: "Rate limits exceeded, please try again later.",
    402: "AI credits exhausted, please add funds to your workspace.",
}


# ── Scheduler ──────────────────────────────────────────────────────────────────

class BatchScheduler:
    """
    Runs the extraction client over a batch in fixed-size concurrent windows.

    client is anything with `async extract(FileRecord, prompt) -> str`.
    sleep is injectable so tests can observe the inter-window delay.
    """

    def __init__(
        self,
        client,
        profile: ExtractionProfile,
        policy: Optional[BatchPolicy] = None,
        window_size: int = BATCH_WINDOW_SIZE,
        window_delay: float = BATCH_WINDOW_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if window_size < 1:
            raise ValueError(f"window_size must be >= 1, got {window_size}")
        self.client = client
        self.profile = profile
        self.policy = policy or BatchPolicy()
        self.window_size = window_size
        self.window_delay = window_delay
        self._sleep = sleep

    def _windows(self, files: Sequence[FileRecord]) -> list[Sequence[FileRecord]]:
        return [
            files[i : i + self.window_size]
            for i in range(0, len(files), self.window_size)
        ]

    async def _process_one(self, record: FileRecord, prompt: str) -> ExtractionOutcome:
        violation = self.policy.check_file(record)
        if violation:
            return ExtractionOutcome.failure(record.name, violation)

        logger.info(f"[{record.name}] Sending {record.size} bytes ({record.mime_type}).")
        try:
            fragment = await self.client.extract(record, prompt)
        except EmptyResponseError:
            logger.warning(f"[{record.name}] Empty AI reply, no rows from this file.")
            return ExtractionOutcome.success(record.name, "")
        except TransportError as exc:
            return ExtractionOutcome.failure(
                record.name, AI_FAILURE_MESSAGE, status_code=exc.status_code
            )
        except Exception as exc:
            logger.error(f"[{record.name}] Unexpected extraction error: {exc}", exc_info=True)
            return ExtractionOutcome.failure(record.name, str(exc) or type(exc).__name__)

        return ExtractionOutcome.success(record.name, fragment)

    async def run(self, files: Sequence[FileRecord]) -> list[ExtractionOutcome]:
        """
        Extract every file and return one outcome per file, in submission order.

        Raises ConfigurationError before any per-file work when no client is set.
        """
        if self.client is None:
            raise ConfigurationError("API key not configured")

        prompt = self.profile.render_prompt()
        windows = self._windows(files)
        outcomes: list[ExtractionOutcome] = []
        start_time = time.monotonic()

        for index, window in enumerate(windows):
            if index > 0 and self.window_delay > 0:
                logger.info(f"Waiting {self.window_delay:.1f}s before window {index + 1}.")
                await self._sleep(self.window_delay)

            logger.info(
                f"Window {index + 1}/{len(windows)}: "
                f"{len(window)} file(s) in parallel."
            )
            results = await asyncio.gather(
                *[self._process_one(record, prompt) for record in window]
            )
            outcomes.extend(results)

        failed = sum(1 for o in outcomes if not o.succeeded)
        logger.info(
            f"Batch finished in {time.monotonic() - start_time:.2f}s: "
            f"{len(outcomes) - failed} ok, {failed} failed."
        )
        return outcomes


def summarize_failures(outcomes: Sequence[ExtractionOutcome]) -> Optional[BatchFailure]:
    """
    Return a BatchFailure when every file failed with the same rate-limit (429)
    or quota (402) status. Mixed or partial failures stay per-file.
    """
    if not outcomes or any(o.succeeded for o in outcomes):
        return None

    codes = {o.status_code for o in outcomes}
    if len(codes) != 1:
        return None

    code = codes.pop()
    if code not in _BATCH_FAILURE_MESSAGES:
        return None
    return BatchFailure(status_code=code, message=_BATCH_FAILURE_MESSAGES[code])
