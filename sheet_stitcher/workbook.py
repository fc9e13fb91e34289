"""Excel export of a stitch run: stitched table, change log and validation stats."""

from __future__ import annotations

from pathlib import Path

import openpyxl
from openpyxl.styles import Alignment, Font, PatternFill
from openpyxl.utils import get_column_letter

CHANGE_LOG_HEADERS = [
    "row_id", "column_name", "column_header", "column_index", "source",
    "current_value", "corrected_value", "needs_change", "is_flagged",
    "unable_to_fix", "flag_reason", "cleaner_note",
]
VALIDATION_HEADERS = [
    "column_name", "column_header", "regex", "total_count",
    "pre_valid_count", "post_valid_count", "post_invalid_count", "empty_count",
    "pre_valid_pct", "post_valid_pct", "delta_pct", "degraded",
]

# Accent fills for applied / flagged ledger rows
FILL_APPLIED = PatternFill("solid", fgColor="FFF2CC")   # soft yellow
FILL_FLAGGED = PatternFill("solid", fgColor="FCE4D6")   # soft orange


def _header_font() -> Font:
    return Font(bold=True, color="FFFFFF")


def _header_fill(hex_color: str) -> PatternFill:
    return PatternFill("solid", fgColor=hex_color)


def _style_sheet(ws, col_widths: list[int], header_color: str):
    """Apply bold header, color, frozen row, and column widths."""
    fill = _header_fill(header_color)
    font = _header_font()
    for cell in ws[1]:
        cell.font = font
        cell.fill = fill
        cell.alignment = Alignment(horizontal="center", vertical="center", wrap_text=False)
    ws.freeze_panes = "A2"
    for i, width in enumerate(col_widths, start=1):
        ws.column_dimensions[get_column_letter(i)].width = width


def _infer_col_widths(rows: list[list], min_width: int = 10, max_width: int = 60, sample: int = 300) -> list[int]:
    if not rows:
        return []
    widths = [max(min_width, min(max_width, len(str(v)) + 2)) for v in rows[0]]
    for row in rows[1 : sample + 1]:
        for i, val in enumerate(row):
            widths[i] = max(widths[i], min(max_width, len(str(val)) + 2))
    return widths


def write_stitch_workbook(result, output_path: "str | Path") -> Path:
    """
    Write ``result`` (a StitchResult) to a three-sheet workbook:
    "Stitched Data", "Change Log" and "Validation".
    """
    output_path = Path(output_path)
    wb = openpyxl.Workbook()

    # ── Sheet 1 — Stitched Data ──────────────────────────────────────────
    ws1 = wb.active
    ws1.title = "Stitched Data"
    headers = [str(column) for column in result.dataframe.columns]
    data_rows = [headers]
    ws1.append(headers)
    for values in result.dataframe.itertuples(index=False, name=None):
        row_out = ["" if value is None else str(value) for value in values]
        ws1.append(row_out)
        data_rows.append(row_out)
    _style_sheet(ws1, _infer_col_widths(data_rows), "4CAF50")   # green

    # ── Sheet 2 — Change Log ─────────────────────────────────────────────
    ws2 = wb.create_sheet("Change Log")
    log_rows = [CHANGE_LOG_HEADERS]
    ws2.append(CHANGE_LOG_HEADERS)
    for change in result.changes:
        row_out = [
            change.row_id, change.column_name, change.column_header, change.column_index,
            change.source, change.current_value, change.corrected_value,
            change.needs_change, change.is_flagged, change.unable_to_fix,
            change.flag_reason or "", change.cleaner_note or "",
        ]
        ws2.append(row_out)
        log_rows.append(row_out)
        fill = FILL_FLAGGED if change.is_flagged else FILL_APPLIED if change.needs_change else None
        if fill is not None:
            for cell in ws2[ws2.max_row]:
                cell.fill = fill
    _style_sheet(ws2, _infer_col_widths(log_rows), "1565C0")   # blue

    # Flag reason column text-wrap
    reason_col = get_column_letter(CHANGE_LOG_HEADERS.index("flag_reason") + 1)
    for cell in ws2[reason_col][1:]:
        cell.alignment = Alignment(wrap_text=True, vertical="top")

    # ── Sheet 3 — Validation ─────────────────────────────────────────────
    ws3 = wb.create_sheet("Validation")
    stat_rows = [VALIDATION_HEADERS]
    ws3.append(VALIDATION_HEADERS)
    delta = result.validation_delta()
    for name, post in result.post_validation.items():
        pre = result.pre_validation.get(name)
        row_out = [
            post.column_name, post.column_header, post.regex, post.total_count,
            pre.valid_count if pre else "", post.valid_count, post.invalid_count, post.empty_count,
            pre.valid_percentage if pre else "", post.valid_percentage, delta.get(name, ""),
            post.degraded,
        ]
        ws3.append(row_out)
        stat_rows.append(row_out)
    _style_sheet(ws3, _infer_col_widths(stat_rows), "E53935")   # red

    output_path.parent.mkdir(parents=True, exist_ok=True)
    wb.save(output_path)
    return output_path
