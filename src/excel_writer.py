"""
excel_writer.py

Builds an Excel workbook from a reconciled receipt table.

Sheet "Results"
    One row per CanonicalRow, columns in schema order.
    Bold frozen header row. Auto-filter. Columns sized to content.
    Amount-like columns are written as numbers when they parse as numbers,
    so totals can be summed in Excel.

Sheet "Errors" (only when at least one file failed)
    Filename + error message per failed file.
"""

import io
import logging
from datetime import date
from typing import Optional

from openpyxl import Workbook
from openpyxl.styles import Alignment, Font
from openpyxl.utils import get_column_letter

from csv_reconciler import CanonicalTable

logger = logging.getLogger(__name__)

_FONT_NAME   = "Calibri"
_FONT_HEADER = Font(name=_FONT_NAME, bold=True, size=10)
_FONT_BODY   = Font(name=_FONT_NAME, size=10)

_ALIGN_HEADER = Alignment(horizontal="center", vertical="center", wrap_text=True)
_ALIGN_LEFT   = Alignment(horizontal="left",   vertical="center", wrap_text=False)
_ALIGN_RIGHT  = Alignment(horizontal="right",  vertical="center", wrap_text=False)

_NUMERIC_COLUMNS = {"Amount", "total_amount", "vat_amount"}

_MIN_WIDTH = 10
_MAX_WIDTH = 50


# ── Helpers ────────────────────────────────────────────────────────────────────

def _as_number(value: str) -> Optional[float]:
    try:
        return float(value.replace(",", ""))
    except (AttributeError, ValueError):
        return None


def _col_width(values: list[str]) -> int:
    longest = max((len(v) for v in values if v), default=0)
    return min(max(longest + 2, _MIN_WIDTH), _MAX_WIDTH)


def _write_header(sheet, headers) -> None:
    for col_idx, header in enumerate(headers, start=1):
        cell = sheet.cell(row=1, column=col_idx, value=header)
        cell.font      = _FONT_HEADER
        cell.alignment = _ALIGN_HEADER

    sheet.freeze_panes = "A2"
    sheet.row_dimensions[1].height = 30
    sheet.auto_filter.ref = f"A1:{get_column_letter(len(headers))}1"


# ── Sheet builders ─────────────────────────────────────────────────────────────

def _write_results_sheet(sheet, table: CanonicalTable) -> None:
    _write_header(sheet, table.schema)

    for row_idx, row in enumerate(table.rows, start=2):
        for col_idx, col_name in enumerate(table.schema, start=1):
            value = row[col_idx - 1]
            number = _as_number(value) if col_name in _NUMERIC_COLUMNS else None

            cell = sheet.cell(
                row=row_idx,
                column=col_idx,
                value=number if number is not None else (value or None),
            )
            cell.font      = _FONT_BODY
            cell.alignment = _ALIGN_RIGHT if number is not None else _ALIGN_LEFT

    for col_idx, col_name in enumerate(table.schema, start=1):
        column_values = [col_name] + [row[col_idx - 1] for row in table.rows]
        sheet.column_dimensions[get_column_letter(col_idx)].width = _col_width(column_values)


def _write_errors_sheet(sheet, table: CanonicalTable) -> None:
    _write_header(sheet, ("Filename", "Error"))

    for row_idx, err in enumerate(table.errors, start=2):
        for col_idx, value in enumerate((err.filename, err.error), start=1):
            cell = sheet.cell(row=row_idx, column=col_idx, value=value)
            cell.font      = _FONT_BODY
            cell.alignment = _ALIGN_LEFT

    sheet.column_dimensions["A"].width = _col_width(["Filename"] + [e.filename for e in table.errors])
    sheet.column_dimensions["B"].width = _col_width(["Error"] + [e.error for e in table.errors])


# ── Public API ─────────────────────────────────────────────────────────────────

def build_excel(table: CanonicalTable) -> bytes:
    """Render the table as raw .xlsx bytes."""
    wb = Workbook()
    ws = wb.active
    ws.title = "Results"
    _write_results_sheet(ws, table)

    if table.errors:
        _write_errors_sheet(wb.create_sheet("Errors"), table)

    buffer = io.BytesIO()
    wb.save(buffer)
    buffer.seek(0)

    logger.info(f"Excel built: {len(table.rows)} row(s), {len(table.errors)} error(s).")
    return buffer.read()


def get_output_filename(extension: str = "xlsx", today: Optional[date] = None) -> str:
    today = today or date.today()
    return f"receipts-{today.isoformat()}.{extension}"
