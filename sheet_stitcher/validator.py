"""
validator.py — Regex Contract Validator

Every mapped column may carry a regex contract from the architect's schema.
Validation counts how many values satisfy it. Empty values always satisfy a
contract; so does every value when the regex cannot be compiled, in which
case the result is marked ``degraded`` and a warning is logged.

A bare ``$`` in a contract matches only at the very end of the value, never
before a trailing newline.

Row ids are 1-based positions in the table, the same ids the semantic diff
uses.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

import pandas as pd

from sheet_stitcher.errors import ValidationDegradation
from sheet_stitcher.mapping import CATCH_ALL_REGEX, ColumnMapping

logger = logging.getLogger(__name__)

EMPTY_SENTINELS = frozenset({"null", "NaN", "nan", "undefined"})


def is_empty_value(value: Any) -> bool:
    if value is None:
        return True
    if not isinstance(value, str):
        try:
            if pd.isna(value):
                return True
        except (TypeError, ValueError):
            return False
        value = str(value)
    return value.strip() == "" or value in EMPTY_SENTINELS


def _is_trivial_contract(regex: str | None) -> bool:
    return not regex or regex == CATCH_ALL_REGEX


def _end_anchors_to_end_of_input(regex: str) -> str:
    """Rewrite each bare ``$`` as ``\\Z`` so a trailing newline cannot satisfy it."""
    out: list[str] = []
    in_class = False
    i = 0
    while i < len(regex):
        ch = regex[i]
        if ch == "\\":
            out.append(regex[i:i + 2])
            i += 2
            continue
        if in_class:
            if ch == "]":
                in_class = False
        elif ch == "[":
            in_class = True
            # a leading ] (or ^]) is a literal member of the class
            if regex[i + 1:i + 2] == "]":
                out.append("[]")
                i += 2
                continue
            if regex[i + 1:i + 3] == "^]":
                out.append("[^]")
                i += 3
                continue
        elif ch == "$":
            ch = r"\Z"
        out.append(ch)
        i += 1
    return "".join(out)


def compile_contract(regex: str) -> re.Pattern:
    try:
        return re.compile(_end_anchors_to_end_of_input(regex))
    except re.error as exc:
        raise ValidationDegradation(regex, str(exc)) from exc


def test_regex_match(value: Any, regex: str | None) -> bool:
    """True when ``value`` satisfies ``regex``; empties and bad regexes pass."""
    if _is_trivial_contract(regex) or is_empty_value(value):
        return True
    try:
        pattern = compile_contract(regex)
    except ValidationDegradation as exc:
        logger.warning("%s; treating value as valid", exc)
        return True
    return pattern.search(str(value)) is not None


# keep pytest from collecting the helper above as a test
test_regex_match.__test__ = False


@dataclass
class ValidationResult:
    column_header: str
    regex: str
    original_key: str | None = None
    column_name: str | None = None
    total_count: int = 0
    valid_count: int = 0
    invalid_count: int = 0
    empty_count: int = 0
    invalid_rows: list[dict[str, Any]] = field(default_factory=list)
    degraded: bool = False

    @property
    def valid_percentage(self) -> float:
        if not self.total_count:
            return 0.0
        return round(self.valid_count / self.total_count * 100, 2)

    @property
    def invalid_percentage(self) -> float:
        if not self.total_count:
            return 0.0
        return round(self.invalid_count / self.total_count * 100, 2)

    def invalid_row_ids(self) -> list[int]:
        return [row["rowId"] for row in self.invalid_rows]

    def to_dict(self) -> dict[str, Any]:
        return {
            "original_key":       self.original_key,
            "column_name":        self.column_name,
            "column_header":      self.column_header,
            "regex":              self.regex,
            "total_count":        self.total_count,
            "valid_count":        self.valid_count,
            "invalid_count":      self.invalid_count,
            "empty_count":        self.empty_count,
            "valid_percentage":   self.valid_percentage,
            "invalid_percentage": self.invalid_percentage,
            "degraded":           self.degraded,
            "invalid_rows":       [dict(row) for row in self.invalid_rows],
        }


def validate_column(
    df: pd.DataFrame,
    column_header: str,
    regex: str,
    *,
    original_key: str | None = None,
    column_name: str | None = None,
    position: int | None = None,
) -> ValidationResult:
    """
    Validate one column. ``position`` selects the column by index and wins
    over ``column_header`` when the table has duplicate headers.
    """
    result = ValidationResult(
        column_header=column_header,
        regex=regex,
        original_key=original_key,
        column_name=column_name if column_name is not None else column_header,
    )
    series = df.iloc[:, position] if position is not None else df[column_header]

    pattern = None
    if not _is_trivial_contract(regex):
        try:
            pattern = compile_contract(regex)
        except ValidationDegradation as exc:
            logger.warning("%s; all values in '%s' treated as valid", exc, column_header)
            result.degraded = True

    for row_id, value in enumerate(series.tolist(), start=1):
        result.total_count += 1
        if is_empty_value(value):
            result.empty_count += 1
            result.valid_count += 1
        elif pattern is None or pattern.search(str(value)) is not None:
            result.valid_count += 1
        else:
            result.invalid_count += 1
            result.invalid_rows.append({"rowId": row_id, "value": str(value)})
    return result


def validate_dataset(df: pd.DataFrame, mapping: ColumnMapping) -> dict[str, ValidationResult]:
    """
    Validate every non-excluded contract column of ``mapping``.

    Columns are located by index position in the live headers, never by
    name. Positions beyond the table width are logged and skipped.
    """
    results: dict[str, ValidationResult] = {}
    headers = list(df.columns)
    for spec in mapping.contract_columns():
        if spec.position >= len(headers):
            logger.warning(
                "Column '%s' (index %d) is outside the table's %d columns; skipped",
                spec.name, spec.index, len(headers),
            )
            continue
        key = spec.name if spec.name not in results else f"{spec.name}__{spec.index}"
        results[key] = validate_column(
            df,
            str(headers[spec.position]),
            spec.regex,
            original_key=spec.original_key,
            column_name=spec.name,
            position=spec.position,
        )
    return results


def partition_column(
    df: pd.DataFrame,
    column_header: str,
    regex: str,
) -> tuple[list[int], list[dict[str, Any]]]:
    """Split a column into valid row ids and the invalid rows needing cleaning."""
    result = validate_column(df, column_header, regex)
    invalid_ids = set(result.invalid_row_ids())
    valid_ids = [row_id for row_id in range(1, result.total_count + 1) if row_id not in invalid_ids]
    return valid_ids, list(result.invalid_rows)


def validation_delta(
    pre: dict[str, ValidationResult],
    post: dict[str, ValidationResult],
) -> dict[str, float]:
    """Post minus pre ``valid_percentage`` for every column validated both times."""
    return {
        name: round(post[name].valid_percentage - pre[name].valid_percentage, 2)
        for name in post
        if name in pre
    }
