"""
pipeline.py — Architect and cleaner stages

These two stages produce the text artifacts the stitcher reconciles:

    architect   base table sample -> AI -> architect_output.txt,
                architect_log.txt, column_mapping.json
    cleaner     per column: invalid values -> AI -> cleaned_columns/outputs/<col>_output.txt

Columns are sent one at a time in mapping index order with a fixed pause
between them. A failing column is logged and reported; the run continues
with the next column.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Callable

import pandas as pd
import requests

from sheet_stitcher.client import AIServiceClient
from sheet_stitcher.config import StitchConfig
from sheet_stitcher.csv_line import format_csv_line
from sheet_stitcher.errors import MissingArtifactError
from sheet_stitcher.loader import load_csv_table
from sheet_stitcher.mapping import ColumnMapping, ColumnSpec, create_column_mapping
from sheet_stitcher.sections import (
    SCHEMA_DESIGN,
    SEMANTIC_DIFF,
    SYNTHETIC_ID_COLUMN,
    build_architect_log,
    build_user_data_sample,
    extract_section,
)
from sheet_stitcher.semantic_diff import (
    cleaner_output_filename,
    extract_column_schema,
    extract_scoped_semantic_diff,
)
from sheet_stitcher.stitcher import drop_synthetic_id_column
from sheet_stitcher.validator import partition_column

logger = logging.getLogger(__name__)


def _load_base_table(config: StitchConfig) -> tuple[Path, pd.DataFrame]:
    base_path = config.base_table_path()
    if not base_path.exists():
        raise MissingArtifactError("base table", base_path)
    return base_path, load_csv_table(base_path)["dataframe"]


# ══════════════════════════════════════════════════════════════════════════════
# ARCHITECT
# ══════════════════════════════════════════════════════════════════════════════

def run_architect(
    config: StitchConfig,
    client: AIServiceClient,
    *,
    custom_instructions: str | None = None,
    model: str | None = None,
) -> ColumnMapping:
    """Send a sample of the base table to the architect and build the column mapping."""
    base_path, df = _load_base_table(config)
    user_data = build_user_data_sample(df, config.sample_size)
    logger.info("Sending %d sample rows from %s to the architect", min(config.sample_size, len(df)), base_path.name)

    response_text = client.process_architect(
        user_data,
        sample_size=config.sample_size,
        custom_instructions=custom_instructions,
        model=model,
    )

    config.outputs_path.mkdir(parents=True, exist_ok=True)
    config.architect_output_path.write_text(response_text, encoding="utf-8")
    config.architect_log_path.write_text(build_architect_log(user_data, response_text), encoding="utf-8")
    return create_column_mapping(config.architect_log_path, config.column_mapping_path)


# ══════════════════════════════════════════════════════════════════════════════
# CLEANER
# ══════════════════════════════════════════════════════════════════════════════

def build_column_data(column_name: str, invalid_rows: list[dict[str, Any]]) -> str:
    """``ID,<column>`` CSV of the values that need cleaning."""
    lines = [format_csv_line([SYNTHETIC_ID_COLUMN, column_name])]
    lines.extend(format_csv_line([row["rowId"], row["value"]]) for row in invalid_rows)
    return "\n".join(lines)


def _cleaner_log(spec: ColumnSpec, column_schema: str, scoped_diff: str, column_data: str, response_text: str) -> str:
    return "\n".join(
        [
            "=== COLUMN INFO ===",
            f"Original Name: {spec.original_key}",
            f"New Name: {spec.name}",
            f"Index: {spec.index}",
            f"Is Excluded: {str(spec.is_excluded).lower()}",
            "",
            "=== INPUT ===",
            f"Schema: {column_schema}",
            f"Scoped Semantic Diff: {scoped_diff}",
            f"Data: {column_data}",
            "",
            "=== AI RESPONSE ===",
            response_text,
        ]
    )


def clean_column(
    config: StitchConfig,
    client: AIServiceClient,
    spec: ColumnSpec,
    df: pd.DataFrame,
    schema_block: str,
    diff_block: str,
    *,
    model: str | None = None,
) -> tuple[str, Path | None]:
    """
    Clean one column. Returns (status, output_path) where status is one of
    ``catch_all``, ``already_valid`` or ``processed``.
    """
    if not spec.has_contract:
        logger.info("Skipping column %d: %s (regex allows any value)", spec.index, spec.name)
        return "catch_all", None

    header = str(df.columns[spec.position])
    valid_ids, invalid_rows = partition_column(df, header, spec.regex)
    logger.info(
        "Column %d: %s has %d valid values, %d need cleaning",
        spec.index, spec.name, len(valid_ids), len(invalid_rows),
    )
    if not invalid_rows:
        return "already_valid", None

    column_schema = extract_column_schema(schema_block, spec.name)
    scoped_diff = extract_scoped_semantic_diff(diff_block, spec.name, spec.index)
    column_data = build_column_data(spec.name, invalid_rows)

    response_text = client.process_cleaner(column_data, column_schema, scoped_diff, model=model)

    filename = cleaner_output_filename(spec.name)
    output_path = config.cleaner_outputs_path / filename
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(response_text, encoding="utf-8")

    log_path = config.cleaner_logs_path / filename.replace("_output.txt", "_log.txt")
    log_path.parent.mkdir(parents=True, exist_ok=True)
    log_path.write_text(_cleaner_log(spec, column_schema, scoped_diff, column_data, response_text), encoding="utf-8")
    return "processed", output_path


def run_cleaner(
    config: StitchConfig,
    client: AIServiceClient,
    *,
    model: str | None = None,
    sleep: Callable[[float], Any] = time.sleep,
) -> dict[str, Any]:
    """Clean every non-excluded contract column; returns a summary dict."""
    mapping = ColumnMapping.load(config.column_mapping_path)
    if not config.architect_output_path.exists():
        raise MissingArtifactError("architect output", config.architect_output_path)
    architect_text = config.architect_output_path.read_text(encoding="utf-8")
    schema_block = extract_section(architect_text, SCHEMA_DESIGN, required=True)
    diff_block = extract_section(architect_text, SEMANTIC_DIFF) or ""

    _, df = _load_base_table(config)
    df = drop_synthetic_id_column(df, mapping)

    summary: dict[str, Any] = {
        "processed":     [],
        "already_valid": [],
        "catch_all":     [],
        "excluded":      [],
        "failed":        [],
        "outputs":       [],
        "warnings":      [],
    }
    for spec in mapping:
        if spec.is_excluded:
            logger.info("Skipping excluded column %d: %s", spec.index, spec.name)
            summary["excluded"].append(spec.name)
            continue
        if spec.position >= len(df.columns):
            message = f"Column {spec.index}: {spec.name} has no data in the base table; skipped"
            logger.warning(message)
            summary["warnings"].append(message)
            continue

        try:
            status, output_path = clean_column(config, client, spec, df, schema_block, diff_block, model=model)
        except requests.RequestException as exc:
            message = f"Error processing column {spec.name}: {exc}"
            logger.error(message)
            summary["failed"].append(spec.name)
            summary["warnings"].append(message)
            continue

        summary[status].append(spec.name)
        if output_path is not None:
            summary["outputs"].append(str(output_path))
            sleep(config.column_delay_seconds)

    logger.info(
        "Cleaner finished: %d processed, %d already valid, %d catch-all, %d excluded, %d failed",
        len(summary["processed"]), len(summary["already_valid"]), len(summary["catch_all"]),
        len(summary["excluded"]), len(summary["failed"]),
    )
    return summary
