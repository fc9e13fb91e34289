"""
stitcher.py — Patch Reconciliation Applier

Merges the base table, the column mapping and every available correction
into one reconciled table plus a change ledger.

Order of operations (fixed):

    1. rename headers           position wins over name
    2. row corrections          architect <semantic_diff>, full rows
    3. pre-validation           regex contracts, before cell corrections
    4. cell corrections         per-column cleaner outputs, filename order
    5. post-validation
    6. flagging                 every cell still invalid gets a flagged record

Row corrections run before cell corrections and nothing detects a cell
touched by both; the later cell correction wins.

Public API:
    result = stitch(df, mapping, row_corrections, cell_sources)
    result = run_stitch(config)        # file-level run, writes all outputs
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator

import pandas as pd

from sheet_stitcher.config import StitchConfig
from sheet_stitcher.contracts import build_run_summary, wrap_payload
from sheet_stitcher.errors import MissingArtifactError, OutOfRangeError
from sheet_stitcher.loader import load_csv_table, write_csv_table
from sheet_stitcher.mapping import ColumnMapping, ColumnSpec
from sheet_stitcher.sections import SEMANTIC_DIFF, SYNTHETIC_ID_COLUMN, extract_section
from sheet_stitcher.semantic_diff import (
    OUTPUT_SUFFIX,
    CellCorrection,
    RowCorrection,
    column_name_from_filename,
    parse_cell_corrections,
    parse_row_corrections,
    safe_column_filename,
)
from sheet_stitcher.validator import ValidationResult, validate_dataset, validation_delta
from sheet_stitcher.workbook import write_stitch_workbook

logger = logging.getLogger(__name__)

REGEX_VALIDATION_SOURCE = "regex-validation"


@dataclass
class ChangeRecord:
    row_id: int
    column_name: str
    column_header: str
    column_index: int
    source: str
    current_value: str
    corrected_value: str
    needs_change: bool
    is_flagged: bool = False
    flag_reason: str | None = None
    unable_to_fix: bool = False
    cleaner_note: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "rowId":          self.row_id,
            "columnName":     self.column_name,
            "columnHeader":   self.column_header,
            "columnIndex":    self.column_index,
            "source":         self.source,
            "currentValue":   self.current_value,
            "correctedValue": self.corrected_value,
            "needsChange":    self.needs_change,
            "isFlagged":      self.is_flagged,
            "flagReason":     self.flag_reason,
            "unableToFix":    self.unable_to_fix,
            "cleanerNote":    self.cleaner_note,
        }


class ChangeLedger:
    """One ChangeRecord per cell, keyed by (row_id, column_index), in first-seen order."""

    def __init__(self) -> None:
        self._records: dict[tuple[int, int], ChangeRecord] = {}

    def __iter__(self) -> Iterator[ChangeRecord]:
        return iter(self._records.values())

    def __len__(self) -> int:
        return len(self._records)

    def get(self, row_id: int, column_index: int) -> ChangeRecord | None:
        return self._records.get((row_id, column_index))

    def add(self, record: ChangeRecord) -> ChangeRecord:
        self._records[(record.row_id, record.column_index)] = record
        return record

    def records(self) -> list[ChangeRecord]:
        return list(self._records.values())


@dataclass(frozen=True)
class CleanerOutput:
    """Scoped corrections from one per-column cleaner response file."""
    source: str
    column_name: str
    corrections: tuple[CellCorrection, ...]
    flag_notes: dict[int, str] = field(default_factory=dict)


@dataclass
class StitchResult:
    dataframe: pd.DataFrame
    changes: list[ChangeRecord]
    pre_validation: dict[str, ValidationResult]
    post_validation: dict[str, ValidationResult]
    rows_updated: int = 0
    renamed_columns: list[dict[str, Any]] = field(default_factory=list)
    dropped_corrections: int = 0
    warnings: list[str] = field(default_factory=list)

    @property
    def applied_count(self) -> int:
        return sum(1 for change in self.changes if change.needs_change)

    @property
    def flagged_count(self) -> int:
        return sum(1 for change in self.changes if change.is_flagged)

    def validation_delta(self) -> dict[str, float]:
        return validation_delta(self.pre_validation, self.post_validation)

    def metrics(self) -> dict[str, Any]:
        return {
            "rows":                len(self.dataframe),
            "columns":             len(self.dataframe.columns),
            "rows_updated":        self.rows_updated,
            "change_records":      len(self.changes),
            "applied_changes":     self.applied_count,
            "flagged_cells":       self.flagged_count,
            "cleaner_flagged":     sum(1 for change in self.changes if change.cleaner_note is not None),
            "dropped_corrections": self.dropped_corrections,
        }


def _warn(warnings: list[str], message: str) -> None:
    logger.warning(message)
    warnings.append(message)


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    if not isinstance(value, str) and pd.isna(value):
        return ""
    return str(value)


# ══════════════════════════════════════════════════════════════════════════════
# STEP 1 — HEADER RENAME
# ══════════════════════════════════════════════════════════════════════════════

def rename_headers(
    df: pd.DataFrame,
    mapping: ColumnMapping,
    warnings: list[str] | None = None,
) -> tuple[pd.DataFrame, list[dict[str, Any]]]:
    """
    Rename the header at each entry's position to its semantic name.

    A header that differs from the entry's original key is renamed anyway
    and a warning is logged. Entries past the table width are skipped.
    """
    warnings = warnings if warnings is not None else []
    headers = [str(header) for header in df.columns]
    renamed: list[dict[str, Any]] = []

    for spec in mapping:
        if spec.position >= len(headers):
            _warn(
                warnings,
                f"Mapping entry '{spec.original_key}' (index {spec.index}) has no column "
                f"in a {len(headers)}-column table; skipped",
            )
            continue
        current = headers[spec.position]
        matched = current == spec.original_key
        if not matched:
            _warn(
                warnings,
                f"Header mismatch at index {spec.index}: expected '{spec.original_key}', "
                f"found '{current}'; renaming to '{spec.name}' by position",
            )
        headers[spec.position] = spec.name
        renamed.append({"index": spec.index, "from": current, "to": spec.name, "matched": matched})

    out = df.copy()
    out.columns = headers
    return out, renamed


# ══════════════════════════════════════════════════════════════════════════════
# STEP 2 — ROW CORRECTIONS
# ══════════════════════════════════════════════════════════════════════════════

def _check_row_id(df: pd.DataFrame, row_id: int, column: str | None = None) -> int:
    position = row_id - 1
    if not 0 <= position < len(df):
        raise OutOfRangeError(
            f"row id {row_id} is outside 1..{len(df)}",
            row_id=row_id,
            column=column,
        )
    return position


def apply_row_corrections(
    df: pd.DataFrame,
    corrections: list[RowCorrection],
    warnings: list[str] | None = None,
) -> tuple[int, int]:
    """
    Overwrite rows in place from full-row corrections.

    Short rows patch the leading cells only; long rows are truncated to the
    table width. Returns (rows_updated, dropped).
    """
    warnings = warnings if warnings is not None else []
    width = len(df.columns)
    updated = 0
    dropped = 0

    for correction in corrections:
        try:
            position = _check_row_id(df, correction.row_id)
        except OutOfRangeError as exc:
            _warn(warnings, f"Row correction dropped: {exc}")
            dropped += 1
            continue

        values = list(correction.values)
        if len(values) > width:
            logger.debug(
                "Row %d correction has %d values for %d columns; truncated",
                correction.row_id, len(values), width,
            )
            values = values[:width]
        elif len(values) < width:
            logger.debug(
                "Row %d correction has %d values for %d columns; partial apply",
                correction.row_id, len(values), width,
            )
        for column_position, value in enumerate(values):
            df.iat[position, column_position] = value
        updated += 1

    return updated, dropped


# ══════════════════════════════════════════════════════════════════════════════
# STEP 4 — CELL CORRECTIONS
# ══════════════════════════════════════════════════════════════════════════════

def _spec_for_column(mapping: ColumnMapping, column_name: str) -> ColumnSpec | None:
    """Semantic name lookup; cleaner file names carry the filename-safe form."""
    spec = mapping.by_name(column_name)
    if spec is not None:
        return spec
    for candidate in mapping:
        if safe_column_filename(candidate.name) == column_name:
            return candidate
    return None


CLEANER_FLAG_NOTE = "flagged by cleaner"


def _cleaner_note(source: CleanerOutput, row_id: int) -> str | None:
    """The note on the cleaner's FLAGGED marker for this row, if it set one."""
    if row_id not in source.flag_notes:
        return None
    return source.flag_notes[row_id] or CLEANER_FLAG_NOTE


def apply_cell_corrections(
    df: pd.DataFrame,
    mapping: ColumnMapping,
    sources: list[CleanerOutput],
    ledger: ChangeLedger,
    warnings: list[str] | None = None,
) -> int:
    """
    Apply scoped corrections source by source in source-name order.

    Every in-range correction gets a ChangeRecord. A cell corrected twice
    keeps one record whose ``current_value`` is the value before any cell
    correction. Returns the number of corrections dropped.
    """
    warnings = warnings if warnings is not None else []
    dropped = 0

    for source in sorted(sources, key=lambda item: item.source):
        spec = _spec_for_column(mapping, source.column_name)
        if spec is None:
            _warn(warnings, f"{source.source}: column '{source.column_name}' is not in the column mapping; skipped")
            dropped += len(source.corrections)
            continue
        if spec.position >= len(df.columns):
            _warn(
                warnings,
                f"{source.source}: column '{spec.name}' index {spec.index} is outside the table; skipped",
            )
            dropped += len(source.corrections)
            continue

        header = str(df.columns[spec.position])
        for correction in source.corrections:
            try:
                position = _check_row_id(df, correction.row_id, column=spec.name)
            except OutOfRangeError as exc:
                _warn(warnings, f"{source.source}: cell correction dropped: {exc}")
                dropped += 1
                continue

            corrected = correction.value
            existing = ledger.get(correction.row_id, spec.index)
            if existing is None:
                current = _cell_text(df.iat[position, spec.position])
                existing = ledger.add(
                    ChangeRecord(
                        row_id=correction.row_id,
                        column_name=spec.name,
                        column_header=header,
                        column_index=spec.index,
                        source=source.source,
                        current_value=current,
                        corrected_value=corrected,
                        needs_change=current != corrected,
                    )
                )
            else:
                existing.source = source.source
                existing.corrected_value = corrected
                existing.needs_change = existing.current_value != corrected
            existing.cleaner_note = _cleaner_note(source, correction.row_id)
            df.iat[position, spec.position] = corrected

    return dropped


# ══════════════════════════════════════════════════════════════════════════════
# STEP 6 — FLAGGING
# ══════════════════════════════════════════════════════════════════════════════

def flag_reason(value: str, regex: str) -> str:
    return f"value '{value}' does not match regex: {regex}"


def flag_invalid_cells(
    ledger: ChangeLedger,
    post_validation: dict[str, ValidationResult],
    mapping: ColumnMapping,
) -> int:
    """Flag every cell still invalid after correction; returns cells flagged."""
    flagged = 0
    for result in post_validation.values():
        spec = mapping.get(result.original_key) if result.original_key else None
        column_name = spec.name if spec else (result.column_name or result.column_header)
        column_index = spec.index if spec else 0
        for row in result.invalid_rows:
            reason = flag_reason(row["value"], result.regex)
            record = ledger.get(row["rowId"], column_index)
            if record is None:
                record = ledger.add(
                    ChangeRecord(
                        row_id=row["rowId"],
                        column_name=column_name,
                        column_header=result.column_header,
                        column_index=column_index,
                        source=REGEX_VALIDATION_SOURCE,
                        current_value=row["value"],
                        corrected_value=row["value"],
                        needs_change=False,
                    )
                )
            record.is_flagged = True
            record.unable_to_fix = True
            record.flag_reason = reason if record.cleaner_note is None else f"{reason} (cleaner: {record.cleaner_note})"
            flagged += 1
            logger.debug("Flagged row %d column '%s': %s", row["rowId"], column_name, reason)
    return flagged


# ══════════════════════════════════════════════════════════════════════════════
# ORCHESTRATION
# ══════════════════════════════════════════════════════════════════════════════

def stitch(
    df: pd.DataFrame,
    mapping: ColumnMapping,
    row_corrections: list[RowCorrection] | None = None,
    cell_sources: list[CleanerOutput] | None = None,
) -> StitchResult:
    """Reconcile ``df`` in memory. The input frame is not modified."""
    warnings: list[str] = []
    table, renamed = rename_headers(df, mapping, warnings)

    rows_updated, dropped = apply_row_corrections(table, list(row_corrections or []), warnings)
    pre_validation = validate_dataset(table, mapping)

    ledger = ChangeLedger()
    dropped += apply_cell_corrections(table, mapping, list(cell_sources or []), ledger, warnings)
    post_validation = validate_dataset(table, mapping)

    flagged = flag_invalid_cells(ledger, post_validation, mapping)
    logger.info(
        "Stitched %d rows: %d row corrections, %d change records, %d flagged cells",
        len(table), rows_updated, len(ledger), flagged,
    )
    return StitchResult(
        dataframe=table,
        changes=ledger.records(),
        pre_validation=pre_validation,
        post_validation=post_validation,
        rows_updated=rows_updated,
        renamed_columns=renamed,
        dropped_corrections=dropped,
        warnings=warnings,
    )


def output_frame(result: StitchResult, mapping: ColumnMapping, *, drop_excluded: bool = False) -> pd.DataFrame:
    """The table as written to disk; excluded columns removed on request."""
    if not drop_excluded:
        return result.dataframe
    excluded = {spec.position for spec in mapping if spec.is_excluded}
    keep = [position for position in range(len(result.dataframe.columns)) if position not in excluded]
    return result.dataframe.iloc[:, keep]


def drop_synthetic_id_column(df: pd.DataFrame, mapping: ColumnMapping) -> pd.DataFrame:
    """Drop a leading ``ID`` column holding exactly 1..n when the mapping does not cover it."""
    if not len(df.columns) or str(df.columns[0]) != SYNTHETIC_ID_COLUMN or SYNTHETIC_ID_COLUMN in mapping:
        return df
    expected = [str(row_id) for row_id in range(1, len(df) + 1)]
    if [str(value).strip() for value in df.iloc[:, 0].tolist()] != expected:
        return df
    logger.info("Dropping synthetic %s column from base table", SYNTHETIC_ID_COLUMN)
    return df.iloc[:, 1:].copy()


# ══════════════════════════════════════════════════════════════════════════════
# FILE-LEVEL RUN
# ══════════════════════════════════════════════════════════════════════════════

def load_row_corrections(path: Path) -> tuple[list[RowCorrection], list[str]]:
    if not path.exists():
        raise MissingArtifactError("architect output", path)
    block = extract_section(path.read_text(encoding="utf-8"), SEMANTIC_DIFF, required=True)
    parsed = parse_row_corrections(block)
    warnings = [f"{path.name} line {skip.line_number}: {skip.reason}: {skip.excerpt}" for skip in parsed.skipped]
    logger.info("Parsed %d row corrections from %s", len(parsed), path.name)
    return parsed.corrections, warnings


def load_cleaner_outputs(directory: Path) -> tuple[list[CleanerOutput], list[str]]:
    """Every ``*_output.txt`` in ``directory``, sorted by file name."""
    warnings: list[str] = []
    if not directory.is_dir():
        _warn(warnings, f"No cleaner outputs directory at {directory}; running flag-only validation")
        return [], warnings

    files = sorted(path for path in directory.iterdir() if path.name.endswith(OUTPUT_SUFFIX))
    if not files:
        _warn(warnings, f"No cleaner output files in {directory}; running flag-only validation")

    outputs: list[CleanerOutput] = []
    for path in files:
        column_name = column_name_from_filename(path.name)
        block = extract_section(path.read_text(encoding="utf-8"), SEMANTIC_DIFF)
        if block is None:
            _warn(warnings, f"{path.name}: no <{SEMANTIC_DIFF}> section; skipped")
            continue
        parsed = parse_cell_corrections(block, column_name)
        warnings.extend(
            f"{path.name} line {skip.line_number}: {skip.reason}: {skip.excerpt}" for skip in parsed.skipped
        )
        if not parsed.corrections:
            _warn(warnings, f"{path.name}: no corrections for column '{column_name}'")
            continue
        outputs.append(
            CleanerOutput(
                source=path.name,
                column_name=column_name,
                corrections=tuple(parsed.corrections),
                flag_notes=dict(parsed.flag_notes),
            )
        )
    return outputs, warnings


def _write_json(path: Path, payload: dict[str, Any]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
    return path


def build_ledger_payload(result: StitchResult, run_summary: dict[str, Any]) -> dict[str, Any]:
    return wrap_payload(
        "stitcher.change_ledger",
        {"changes": [change.to_dict() for change in result.changes]},
        run_summary,
    )


def build_validation_payload(result: StitchResult, run_summary: dict[str, Any]) -> dict[str, Any]:
    return wrap_payload(
        "stitcher.validation_summary",
        {
            "pre_validation":   {name: item.to_dict() for name, item in result.pre_validation.items()},
            "post_validation":  {name: item.to_dict() for name, item in result.post_validation.items()},
            "validation_delta": result.validation_delta(),
        },
        run_summary,
    )


def run_stitch(config: StitchConfig) -> StitchResult:
    """
    Full reconciliation run from the files named by ``config``.

    Missing mapping, base table or architect output abort the run; missing
    cleaner outputs only leave their columns uncorrected.
    """
    mapping = ColumnMapping.load(config.column_mapping_path)

    base_path = config.base_table_path()
    if not base_path.exists():
        raise MissingArtifactError("base table", base_path)
    loaded = load_csv_table(base_path)
    df = drop_synthetic_id_column(loaded["dataframe"], mapping)
    logger.info("Loaded base table %s (%d rows, %d columns)", base_path.name, len(df), len(df.columns))

    row_corrections, row_warnings = load_row_corrections(config.architect_output_path)
    cell_sources, cell_warnings = load_cleaner_outputs(config.cleaner_outputs_path)

    result = stitch(df, mapping, row_corrections, cell_sources)
    result.warnings = [*loaded["warnings"], *row_warnings, *cell_warnings, *result.warnings]

    stitched_path = write_csv_table(
        output_frame(result, mapping, drop_excluded=config.drop_excluded_columns),
        config.stitched_csv_path,
    )
    run_summary = build_run_summary(
        stage="stitch",
        input_path=base_path,
        output_path=stitched_path,
        metrics=result.metrics(),
        warnings=result.warnings,
    )
    _write_json(config.change_ledger_path, build_ledger_payload(result, run_summary))
    _write_json(config.validation_summary_path, build_validation_payload(result, run_summary))

    workbook_path = config.stitched_workbook_path
    if workbook_path is not None:
        write_stitch_workbook(result, workbook_path)

    logger.info("Stitched table written to %s", stitched_path)
    return result
