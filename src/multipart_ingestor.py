"""
multipart_ingestor.py

Decodes a raw multipart/form-data request body into in-memory file records.

This is a deliberately permissive parser, not a MIME implementation:
    - parts are found by scanning for the exact delimiter b"--" + boundary,
      so binary payloads are only split on the real boundary token;
    - headers are matched with two patterns (filename="..." and Content-Type);
    - parts without a filename (plain form fields) are skipped.

Pure and synchronous. When a framework has already parsed the upload, build
FileRecord objects directly and skip this module.

Public API:
    boundary_from_content_type(header) → str
    parse(raw_body, boundary)          → list[FileRecord]
"""

import logging
import mimetypes
import re
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


class MalformedUploadError(ValueError):
    """The request body is not a multipart payload we can split."""


class EmptyBatchError(ValueError):
    """The upload contained no file parts."""


@dataclass(frozen=True)
class FileRecord:
    name: str
    mime_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


_HEADER_SEPARATOR = b"\r\n\r\n"
_DEFAULT_MIME_TYPE = "application/octet-stream"

# Non-standard spellings some browsers and scanners send.
_MIME_ALIASES = {
    "image/jpg":   "image/jpeg",
    "image/pjpeg": "image/jpeg",
    "image/x-png": "image/png",
}

_FILENAME_RE     = re.compile(r'filename="([^"]+)"', re.IGNORECASE)
_CONTENT_TYPE_RE = re.compile(r"Content-Type:\s*([^\r\n;]+)", re.IGNORECASE)
_BOUNDARY_RE     = re.compile(r'boundary=(?:"([^"]+)"|([^\s;]+))', re.IGNORECASE)


def boundary_from_content_type(content_type: Optional[str]) -> str:
    """Pull the boundary token out of a multipart/form-data Content-Type header."""
    match = _BOUNDARY_RE.search(content_type or "")
    if not match:
        raise MalformedUploadError("No multipart boundary found")
    return match.group(1) or match.group(2)


def _guess_mime_type(filename: str) -> str:
    guessed, _ = mimetypes.guess_type(filename)
    return guessed or _DEFAULT_MIME_TYPE


def _parse_part(part: bytes) -> Optional[FileRecord]:
    header_end = part.find(_HEADER_SEPARATOR)
    if header_end == -1:
        return None

    headers = part[:header_end].decode("utf-8", errors="replace")
    body    = part[header_end + len(_HEADER_SEPARATOR):]

    # The CRLF before the next delimiter belongs to the framing, not the file.
    if body.endswith(b"\r\n"):
        body = body[:-2]

    filename_match = _FILENAME_RE.search(headers)
    if not filename_match:
        return None

    filename = filename_match.group(1)
    content_type_match = _CONTENT_TYPE_RE.search(headers)
    mime_type = content_type_match.group(1).strip().lower() if content_type_match else ""
    # A generic declared type says nothing; the extension usually does.
    if not mime_type or mime_type == _DEFAULT_MIME_TYPE:
        mime_type = _guess_mime_type(filename)
    mime_type = _MIME_ALIASES.get(mime_type, mime_type)

    return FileRecord(name=filename, mime_type=mime_type, data=body)


def parse(raw_body: bytes, boundary: str) -> list[FileRecord]:
    """
    Split raw_body on the boundary delimiter and return one FileRecord per
    part that carries a filename, in body order.

    Raises:
        MalformedUploadError: the delimiter never appears in the body.
        EmptyBatchError:      no part has a filename.
    """
    delimiter = b"--" + boundary.encode("latin-1")

    first = raw_body.find(delimiter)
    if first == -1:
        raise MalformedUploadError("Malformed multipart body: boundary not found")

    records: list[FileRecord] = []
    start = first + len(delimiter)

    while True:
        next_index = raw_body.find(delimiter, start)
        if next_index == -1:
            # Whatever follows the last delimiter is the closing "--" epilogue.
            break

        record = _parse_part(raw_body[start:next_index])
        if record is not None:
            records.append(record)
        start = next_index + len(delimiter)

    if not records:
        raise EmptyBatchError("No files provided")

    logger.info(f"Multipart body parsed: {len(records)} file part(s).")
    return records
