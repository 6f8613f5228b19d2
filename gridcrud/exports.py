from __future__ import annotations

import csv
import re
from datetime import datetime
from io import BytesIO, StringIO
from typing import Any, Sequence, Tuple

from openpyxl import Workbook

CSV_CONTENT_TYPE = "text/csv; charset=utf-8"
XLSX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

# Spreadsheet apps evaluate cells starting with these as formulas.
_FORMULA_PREFIXES = ("=", "+", "-", "@", "\t", "\r")
_SHEET_TITLE_RE = re.compile(r"[\[\]:*?/\\]")


def export_filename(table: str, ext: str, now: datetime | None = None) -> str:
    ts = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
    return f"{table}_{ts}.{ext}"


def _safe_text(value: Any) -> Any:
    if isinstance(value, str) and value.startswith(_FORMULA_PREFIXES):
        return "'" + value
    return value


def _cell(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return _safe_text(value)


def to_csv(header: Sequence[str], rows: Sequence[Sequence[Any]]) -> bytes:
    """UTF-8 with BOM so spreadsheet apps pick the right encoding."""
    buf = StringIO()
    writer = csv.writer(buf)
    writer.writerow(header)
    for row in rows:
        writer.writerow([_cell(v) for v in row])
    return buf.getvalue().encode("utf-8-sig")


def to_xlsx(header: Sequence[str], rows: Sequence[Sequence[Any]], *, sheet: str = "Export") -> bytes:
    wb = Workbook()
    ws = wb.active
    # Excel limits sheet titles to 31 chars.
    ws.title = (_SHEET_TITLE_RE.sub(" ", sheet or "").strip() or "Export")[:31]
    ws.append(list(header))
    for row in rows:
        ws.append([_cell(v) for v in row])
    out = BytesIO()
    wb.save(out)
    return out.getvalue()


def build_export(
    fmt: str, table: str, header: Sequence[str], rows: Sequence[Sequence[Any]], *, sheet: str | None = None
) -> Tuple[bytes, str, str]:
    """Returns (body, content type, filename)."""
    if fmt == "csv":
        return to_csv(header, rows), CSV_CONTENT_TYPE, export_filename(table, "csv")
    if fmt == "xlsx":
        return to_xlsx(header, rows, sheet=sheet or table), XLSX_CONTENT_TYPE, export_filename(table, "xlsx")
    raise ValueError(f"Unsupported export format: {fmt!r}")
