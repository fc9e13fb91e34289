"""
semantic_diff.py — Semantic Diff Parser

The architect and the per-column cleaner both answer with a
``<semantic_diff>`` block: one record per line, keyed by the 1-based row id.

Line grammar (after trimming):

    12,Alice,+15551234567,...        row line: digits, comma, CSV fields
    ... Existing Data ...            sentinel: rows here are unchanged (skipped)
    ```FLAGGED reason```12,Alice,..  flagged row: marker stripped, then a row line
    <blank>                          skipped
    anything else                    logged as unparsable and skipped

Full-row mode yields RowCorrection(row_id, values); scoped mode, used for a
single-column cleaner answer, yields CellCorrection(row_id, column, value).
Both keep the LAST line seen for a row id, since an AI answer sometimes
repeats a row.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from sheet_stitcher.csv_line import parse_csv_line, split_lines
from sheet_stitcher.mapping import SCHEMA_HEADER, strip_schema_marker

logger = logging.getLogger(__name__)

EXISTING_DATA_MARKERS = ("… Existing Data …", "... Existing Data ...")
OUTPUT_SUFFIX = "_output.txt"

ROW_LINE_RE = re.compile(r"^\d+,")
FLAGGED_RE = re.compile(r"^```FLAGGED(?P<note>[^`]*)```")
BATCH_SUFFIX_RE = re.compile(r"_batch_\d+$")


@dataclass(frozen=True)
class RowCorrection:
    row_id: int
    values: tuple[str, ...]


@dataclass(frozen=True)
class CellCorrection:
    row_id: int
    column_name: str
    value: str


@dataclass(frozen=True)
class SkippedLine:
    line_number: int
    excerpt: str
    reason: str


@dataclass
class ParsedDiff:
    corrections: list = field(default_factory=list)
    skipped: list[SkippedLine] = field(default_factory=list)
    flag_notes: dict[int, str] = field(default_factory=dict)
    sentinel_lines: int = 0

    def __len__(self) -> int:
        return len(self.corrections)


def _excerpt(line: str, limit: int = 50) -> str:
    return line[:limit] + ("..." if len(line) > limit else "")


def is_existing_data_sentinel(line: str) -> bool:
    return any(marker in line for marker in EXISTING_DATA_MARKERS)


def strip_flagged_marker(line: str) -> tuple[str, str | None]:
    """Remove a leading FLAGGED marker; returns (rest, note) with note None when unflagged."""
    match = FLAGGED_RE.match(line)
    if match is None:
        return line, None
    return line[match.end() :].strip(), match.group("note").strip()


def unquote_value(value: str) -> str:
    """Strip one pair of surrounding quotes, unescaping doubled quotes inside."""
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        return value[1:-1].replace('""', '"')
    return value


def _iter_record_lines(block: str, parsed: ParsedDiff):
    """Yield (line_number, record_line, flag_note) for every row line; record the rest."""
    for line_number, raw_line in enumerate(split_lines(block), start=1):
        line = raw_line.strip()
        if not line:
            continue
        if is_existing_data_sentinel(line):
            parsed.sentinel_lines += 1
            continue

        record, flag_note = strip_flagged_marker(line)
        if not ROW_LINE_RE.match(record):
            reason = "line does not start with a row id"
            logger.warning("Could not parse semantic_diff line %d: %s (%s)", line_number, _excerpt(line), reason)
            parsed.skipped.append(SkippedLine(line_number, _excerpt(line), reason))
            continue

        if flag_note is not None:
            logger.info("Processing flagged row: %s", _excerpt(record))
        yield line_number, record, flag_note


def parse_row_corrections(block: str) -> ParsedDiff:
    """Full-row mode: first field is the row id, the rest is the whole row."""
    parsed = ParsedDiff()
    by_row: dict[int, RowCorrection] = {}
    for _, record, flag_note in _iter_record_lines(block, parsed):
        fields = parse_csv_line(record)
        row_id = int(fields[0])
        by_row[row_id] = RowCorrection(row_id=row_id, values=tuple(fields[1:]))
        if flag_note is None:
            parsed.flag_notes.pop(row_id, None)
        else:
            parsed.flag_notes[row_id] = flag_note
    parsed.corrections = list(by_row.values())
    return parsed


def parse_cell_corrections(block: str, column_name: str) -> ParsedDiff:
    """Scoped mode: everything after the first comma is the corrected cell value."""
    parsed = ParsedDiff()
    by_row: dict[int, CellCorrection] = {}
    for _, record, flag_note in _iter_record_lines(block, parsed):
        row_text, _, value = record.partition(",")
        row_id = int(row_text)
        by_row[row_id] = CellCorrection(row_id=row_id, column_name=column_name, value=unquote_value(value))
        if flag_note is None:
            parsed.flag_notes.pop(row_id, None)
        else:
            parsed.flag_notes[row_id] = flag_note
    parsed.corrections = list(by_row.values())
    return parsed


# ══════════════════════════════════════════════════════════════════════════════
# CLEANER OUTPUT FILES
# ══════════════════════════════════════════════════════════════════════════════

def column_name_from_filename(filename: str) -> str:
    """``phone_output.txt`` and ``phone_batch_2_output.txt`` both name column ``phone``."""
    name = filename
    if name.endswith(OUTPUT_SUFFIX):
        name = name[: -len(OUTPUT_SUFFIX)]
    return BATCH_SUFFIX_RE.sub("", name)


def safe_column_filename(column_name: str) -> str:
    cleaned = re.sub(r"[^\w\s-]", "", column_name).strip()
    return re.sub(r"[-\s]+", "_", cleaned)


def cleaner_output_filename(column_name: str, batch_number: int = 1, total_batches: int = 1) -> str:
    safe = safe_column_filename(column_name)
    if total_batches <= 1:
        return f"{safe}{OUTPUT_SUFFIX}"
    return f"{safe}_batch_{batch_number}{OUTPUT_SUFFIX}"


# ══════════════════════════════════════════════════════════════════════════════
# CLEANER INPUTS
# ══════════════════════════════════════════════════════════════════════════════

def extract_column_schema(schema_block: str, column_name: str) -> str:
    """Schema header plus the one definition line for ``column_name``."""
    header_line = None
    column_line = None
    for raw_line in split_lines(schema_block):
        line = raw_line.strip()
        if not line:
            continue
        if line == SCHEMA_HEADER:
            header_line = line
            continue
        body, _ = strip_schema_marker(line)
        if body.startswith(f"{column_name},"):
            column_line = body
            break

    if header_line and column_line:
        return f"{header_line}\n{column_line}"
    logger.warning("Could not find schema for column '%s', using full schema", column_name)
    return schema_block


def extract_scoped_semantic_diff(block: str, column_name: str, column_index: int) -> str:
    """
    Reduce the architect's full-row diff to ``ID,<column>`` pairs.

    ``column_index`` is the 1-based mapping index; field 0 of each row line is
    the row id, so the column's value sits at field ``column_index``.
    """
    scoped = [f"ID,{column_name}"]
    for raw_line in split_lines(block):
        line = raw_line.strip()
        if not line or is_existing_data_sentinel(line) or FLAGGED_RE.match(line):
            continue
        fields = parse_csv_line(line)
        if len(fields) > column_index:
            scoped.append(f"{fields[0]},{fields[column_index]}")
    return "\n".join(scoped)
