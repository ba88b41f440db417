"""
batch_policy.py

Intake rules applied before any network call.

Two levels:
    validate_batch → whole-request checks (empty batch, too many files,
                     transport size limit). Raises; the request fails with 400.
    check_file     → per-file checks (empty file, size ceiling, mime type). Returns an
                     error message; only that file fails, siblings proceed.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from config import (
    ACCEPTED_MIME_TYPES,
    MAX_FILE_SIZE_BYTES,
    MAX_FILES_PER_BATCH,
    MAX_UPLOAD_FILE_BYTES,
)
from multipart_ingestor import EmptyBatchError, FileRecord

logger = logging.getLogger(__name__)


class PolicyViolation(ValueError):
    """The batch as a whole breaks an intake rule."""


# Allowance per part for the boundary line and part headers.
_PART_FRAMING_BYTES = 1024


def _format_size(num_bytes: int) -> str:
    if num_bytes % (1024 * 1024) == 0:
        return f"{num_bytes // (1024 * 1024)}MB"
    if num_bytes % 1024 == 0:
        return f"{num_bytes // 1024}KB"
    return f"{num_bytes} bytes"


@dataclass(frozen=True)
class BatchPolicy:
    max_files: int = MAX_FILES_PER_BATCH
    max_file_bytes: int = MAX_FILE_SIZE_BYTES
    max_transport_bytes: int = MAX_UPLOAD_FILE_BYTES
    accepted_mime_types: frozenset = ACCEPTED_MIME_TYPES

    @property
    def max_request_bytes(self) -> int:
        """Largest multipart body a batch within the limits can produce."""
        return self.max_files * (self.max_transport_bytes + _PART_FRAMING_BYTES)

    def request_too_large(self) -> PolicyViolation:
        return PolicyViolation(
            f"File upload error: request body exceeds the "
            f"{_format_size(self.max_request_bytes)} upload limit."
        )

    def validate_batch(self, files: Sequence[FileRecord]) -> None:
        """Reject the whole request. Files are never silently truncated."""
        if not files:
            raise EmptyBatchError("No files provided")

        if len(files) > self.max_files:
            raise PolicyViolation(
                f"Too many files. Maximum {self.max_files} files allowed per request."
            )

        for record in files:
            if record.size > self.max_transport_bytes:
                raise PolicyViolation(
                    f"File upload error: '{record.name}' exceeds the "
                    f"{_format_size(self.max_transport_bytes)} upload limit."
                )

    def check_file(self, record: FileRecord) -> Optional[str]:
        """Return the failure message for this file, or None if it may be sent."""
        if record.size == 0:
            logger.warning(f"[{record.name}] empty file.")
            return f"File '{record.name}' is empty."

        if record.size > self.max_file_bytes:
            logger.warning(
                f"[{record.name}] too large: {record.size} bytes "
                f"(limit {self.max_file_bytes})."
            )
            return f"File too large. Maximum size is {_format_size(self.max_file_bytes)}."

        if self.accepted_mime_types and record.mime_type not in self.accepted_mime_types:
            logger.warning(f"[{record.name}] unsupported type '{record.mime_type}'.")
            return f"Unsupported file type: {record.mime_type}"

        return None
