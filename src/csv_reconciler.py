"""
csv_reconciler.py

Merges the per-file CSV fragments returned by Gemini into one canonical table.

Responsibilities:
  - Enforce the profile schema as the single source of truth for field names
    and order: every row has exactly len(schema) fields, missing ones are "".
  - Drop a leading line that repeats the schema header.
  - Strip markdown code fences the model sometimes wraps its CSV in.
  - Copy a file's shared identifier (invoice number) into its continuation
    rows that leave it empty.
  - Flag rows repeating an earlier row's merchant + date + amount. Flagged
    rows are kept; only the marker field changes.
  - Keep failed files out of the rows and list them in `errors` instead.

Fragments are not guaranteed to be well-formed. Anything that does not parse
contributes zero rows; nothing here raises on model output.
"""

import csv
import io
import logging
from dataclasses import dataclass, field
from typing import Optional, Sequence

from batch_processor import ExtractionOutcome
from prompts import ExtractionProfile

logger = logging.getLogger(__name__)

DUPLICATE_MARKER = "DUPLICATE RECEIPT UPLOADED"


# ── Table ──────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class FileError:
    filename: str
    error: str

    def to_dict(self) -> dict:
        return {"filename": self.filename, "error": self.error}


@dataclass
class CanonicalTable:
    schema: tuple[str, ...]
    rows: list[list[str]] = field(default_factory=list)
    errors: list[FileError] = field(default_factory=list)

    @property
    def header(self) -> str:
        return ",".join(self.schema)

    def to_csv(self) -> str:
        """Header exactly once, then one line per row. Fields are quoted only when needed."""
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n", quoting=csv.QUOTE_MINIMAL)
        writer.writerow(self.schema)
        writer.writerows(self.rows)
        return buffer.getvalue().rstrip("\n")

    def as_records(self) -> list[dict]:
        return [dict(zip(self.schema, row)) for row in self.rows]


# ── Fragment parsing ───────────────────────────────────────────────────────────

def _strip_code_fences(text: str) -> str:
    cleaned = text.strip()
    if cleaned.startswith("```"):
        lines = [l for l in cleaned.split("\n") if not l.strip().startswith("```")]
        cleaned = "\n".join(lines).strip()
    return cleaned


def _split_line(line: str) -> list[str]:
    try:
        cells = next(csv.reader([line], skipinitialspace=True))
    except (csv.Error, StopIteration):
        cells = line.split(",")
    return [cell.strip() for cell in cells]


def _normalize_cell(cell: str) -> str:
    return " ".join(cell.split()).lower()


def is_header_line(line: str, schema: Sequence[str]) -> bool:
    """True when the line names exactly the schema fields, in order."""
    cells = [_normalize_cell(c) for c in _split_line(line)]
    return cells == [_normalize_cell(s) for s in schema]


def _fit_to_schema(cells: list[str], width: int, filename: str) -> list[str]:
    if len(cells) > width:
        logger.warning(
            f"[{filename}] Row has {len(cells)} fields, schema has {width}. "
            f"Extra fields dropped."
        )
        return cells[:width]
    return cells + [""] * (width - len(cells))


def rows_from_fragment(
    fragment: str,
    profile: ExtractionProfile,
    filename: str = "",
) -> list[list[str]]:
    """
    Turn one file's reply into schema-width rows.

    More than one line: the first is dropped only if it is the schema header.
    Exactly one line: it is a data row unless it is the header.
    Blank lines are ignored.
    """
    lines = [l for l in _strip_code_fences(fragment or "").splitlines() if l.strip()]
    if not lines:
        return []

    if is_header_line(lines[0], profile.schema):
        lines = lines[1:]

    width = len(profile.schema)
    rows = [_fit_to_schema(_split_line(line), width, filename) for line in lines]

    if profile.filename_field and filename:
        col = profile.schema.index(profile.filename_field)
        for row in rows:
            if not row[col]:
                row[col] = filename

    return rows


# ── Repairs ────────────────────────────────────────────────────────────────────

def fill_shared_identifier(rows: list[list[str]], column: int) -> None:
    """
    If the first row carries an identifier, copy it into later rows whose
    identifier is empty. Mutates rows in place.
    """
    if not rows or not rows[0][column]:
        return

    shared = rows[0][column]
    for row in rows[1:]:
        if not row[column]:
            row[column] = shared


def flag_duplicates(
    rows: list[list[str]],
    key_columns: Sequence[int],
    marker_column: int,
    marker: str = DUPLICATE_MARKER,
) -> int:
    """
    Append the marker to every row whose key matches an earlier row.
    The first occurrence is left alone. Returns the number of flagged rows.
    """
    seen: set[tuple[str, ...]] = set()
    flagged = 0

    for row in rows:
        key = tuple(_normalize_cell(row[c]) for c in key_columns)
        if not any(key):
            continue
        if key in seen:
            row[marker_column] = f"{row[marker_column]} - {marker}" if row[marker_column] else marker
            flagged += 1
        else:
            seen.add(key)

    return flagged


# ── Public entry point ─────────────────────────────────────────────────────────

def merge(
    outcomes: Sequence[ExtractionOutcome],
    profile: ExtractionProfile,
) -> CanonicalTable:
    """Build the canonical table for a batch, in file-submission order."""
    table = CanonicalTable(schema=profile.schema)
    id_column: Optional[int] = (
        profile.schema.index(profile.id_field) if profile.id_field else None
    )

    for outcome in outcomes:
        if not outcome.succeeded:
            table.errors.append(FileError(outcome.filename, outcome.error or "Unknown error"))
            continue

        rows = rows_from_fragment(outcome.csv_fragment, profile, outcome.filename)
        if not rows:
            logger.info(f"[{outcome.filename}] No data rows in AI reply.")
            continue

        if id_column is not None:
            fill_shared_identifier(rows, id_column)

        table.rows.extend(rows)

    if profile.flag_duplicates and profile.duplicate_key and profile.duplicate_marker_field:
        key_columns = [profile.schema.index(f) for f in profile.duplicate_key]
        marker_column = profile.schema.index(profile.duplicate_marker_field)
        flagged = flag_duplicates(table.rows, key_columns, marker_column)
        if flagged:
            logger.warning(f"{flagged} duplicate receipt row(s) flagged.")

    logger.info(
        f"Table merged: {len(table.rows)} row(s), {len(table.errors)} failed file(s)."
    )
    return table
