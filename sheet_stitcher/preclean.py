"""
preclean.py — Raw CSV pre-cleaner

First stage of a run. Reads the raw export, turns every header and cell into
single-line printable ASCII, drops the columns named in the exclude file and
writes the base table the architect samples:

    data/data.csv  ->  data/data_cleaned.csv

Per value, in order:
    1. typographic characters mapped to ASCII (curly quotes, dashes, fractions, ...)
    2. accents folded (é -> e), anything else outside printable ASCII removed
    3. line breaks, tabs and runs of whitespace collapsed to one space, then trimmed
    4. runs of double quotes or apostrophes collapsed to one

The input file is never modified. An output path that resolves to the input
is refused.
"""

from __future__ import annotations

import logging
import re
import unicodedata
from pathlib import Path
from typing import Any

import pandas as pd

from sheet_stitcher.config import StitchConfig
from sheet_stitcher.errors import ContractError, MissingArtifactError
from sheet_stitcher.loader import load_csv_table, write_csv_table

logger = logging.getLogger(__name__)

TYPOGRAPHIC_REPLACEMENTS = {
    # quotes and primes
    "‘": "'", "’": "'", "“": '"', "”": '"',
    "′": "'", "‵": "'", "`": "'",
    "″": '"', "‶": '"', "‴": '"', "‷": '"',
    "‹": "<", "›": ">", "«": "<<", "»": ">>",
    # punctuation and symbols
    "–": "-", "—": "-", "…": "...",
    "°": " degrees", "×": "x", "÷": "/", "±": "+/-",
    "≤": "<=", "≥": ">=", "≠": "!=", "≈": "~",
    "∞": "infinity", "√": "sqrt", "²": "^2", "³": "^3",
    # vulgar fractions
    "¼": "1/4", "½": "1/2", "¾": "3/4",
    "⅓": "1/3", "⅔": "2/3", "⅕": "1/5", "⅖": "2/5",
    "⅗": "3/5", "⅘": "4/5", "⅙": "1/6", "⅚": "5/6",
    "⅐": "1/7", "⅛": "1/8", "⅜": "3/8", "⅝": "5/8",
    "⅞": "7/8", "⅑": "1/9", "⅒": "1/10",
}

_WHITESPACE_RE = re.compile(r"\s+")
_REPEATED_DOUBLE_QUOTES_RE = re.compile(r'"{2,}')
_REPEATED_APOSTROPHES_RE = re.compile(r"'{2,}")
_NON_PRINTABLE_ASCII_RE = re.compile(r"[^\x20-\x7e]")


def clean_text(value: Any) -> str:
    if value is None:
        return ""
    text = str(value).replace("\ufeff", "").replace("\x00", "")
    if not text:
        return text

    for special, replacement in TYPOGRAPHIC_REPLACEMENTS.items():
        text = text.replace(special, replacement)

    # whitespace first so line separators become spaces, not deletions
    text = _WHITESPACE_RE.sub(" ", text)
    text = unicodedata.normalize("NFKD", text)
    text = _NON_PRINTABLE_ASCII_RE.sub("", text)
    text = _WHITESPACE_RE.sub(" ", text).strip()

    text = _REPEATED_DOUBLE_QUOTES_RE.sub('"', text)
    return _REPEATED_APOSTROPHES_RE.sub("'", text)


def load_excluded_columns(path: "str | Path | None") -> set[str]:
    """One column name per line; blank lines and ``#`` comments ignored. Missing file -> empty set."""
    if path is None:
        return set()
    path = Path(path)
    if not path.exists():
        logger.info("No exclude file at %s; keeping every column", path)
        return set()

    excluded = set()
    for line in path.read_text(encoding="utf-8").split("\n"):
        name = line.strip()
        if name and not name.startswith("#"):
            excluded.add(name)
    if excluded:
        logger.info("Excluding columns: %s", ", ".join(sorted(excluded)))
    return excluded


def preclean_table(df: pd.DataFrame, excluded: "set[str] | frozenset[str]" = frozenset()) -> dict[str, Any]:
    """
    Clean headers and values of ``df`` and drop excluded columns.

    Excluded names are compared against the CLEANED headers. Returns a dict
    with ``dataframe``, ``removed_columns``, ``changed_values`` (per header)
    and ``warnings``. ``df`` is not modified.
    """
    warnings: list[str] = []
    cleaned_headers = [clean_text(header) for header in df.columns]

    keep = [position for position, header in enumerate(cleaned_headers) if header not in excluded]
    removed = list(dict.fromkeys(header for header in cleaned_headers if header in excluded))

    out = df.iloc[:, keep].copy()
    out.columns = [cleaned_headers[position] for position in keep]

    seen: set[str] = set()
    for header in out.columns:
        if header in seen:
            message = f"Duplicate column header after cleaning: '{header}'"
            logger.warning(message)
            warnings.append(message)
        seen.add(header)

    changed_values: dict[str, int] = {}
    for position, header in enumerate(out.columns):
        original = out.iloc[:, position]
        cleaned = original.map(clean_text)
        changed = int((cleaned != original).sum())
        if changed:
            out.iloc[:, position] = cleaned.to_numpy()
            changed_values[header] = changed_values.get(header, 0) + changed
            logger.info("Cleaned column '%s': %d values modified", header, changed)

    return {
        "dataframe":       out,
        "removed_columns": removed,
        "changed_values":  changed_values,
        "warnings":        warnings,
    }


def run_preclean(
    config: StitchConfig,
    *,
    input_path: "str | Path | None" = None,
    output_path: "str | Path | None" = None,
    exclude_path: "str | Path | None" = None,
) -> dict[str, Any]:
    """Clean the raw CSV into the base table; returns a summary dict."""
    input_path = Path(input_path) if input_path else config.raw_csv_path
    output_path = Path(output_path) if output_path else config.cleaned_csv_path
    exclude_path = Path(exclude_path) if exclude_path else config.exclude_columns_path

    if not input_path.exists():
        raise MissingArtifactError("raw CSV", input_path)
    if output_path.resolve() == input_path.resolve():
        raise ContractError(f"Refusing to overwrite the input file {input_path}; choose a different output path.")

    loaded = load_csv_table(input_path)
    result = preclean_table(loaded["dataframe"], load_excluded_columns(exclude_path))
    write_csv_table(result["dataframe"], output_path)

    df = result["dataframe"]
    total_changed = sum(result["changed_values"].values())
    logger.info(
        "Pre-cleaned %s -> %s: %d rows, %d columns, %d values changed, %d columns removed",
        input_path.name, output_path.name, len(df), len(df.columns), total_changed, len(result["removed_columns"]),
    )
    return {
        "input_file":      str(input_path),
        "output_file":     str(output_path),
        "rows":            len(df),
        "columns":         len(df.columns),
        "removed_columns": result["removed_columns"],
        "changed_values":  result["changed_values"],
        "total_changed":   total_changed,
        "warnings":        [*loaded["warnings"], *result["warnings"]],
    }
