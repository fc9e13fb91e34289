"""
loader.py — CSV table loading and writing for sheet-stitcher

Public API:
    result = load_csv_table("data/data_cleaned.csv")
    df     = result["dataframe"]

Result dict keys:
    dataframe         — pandas DataFrame, every cell a str ("" for empty)
    detected_encoding — encoding used as the per-line fallback after UTF-8
    encoding_info     — full dict: detected, confidence, is_utf8, suspicious_chars
    original_rows     — row count including header row
    original_columns  — column count
    warnings          — list of warning strings
"""

from __future__ import annotations

import csv
import io
import logging
from pathlib import Path

import chardet
import pandas as pd

from sheet_stitcher.errors import MissingArtifactError

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════════
# ENCODING DETECTION
# ══════════════════════════════════════════════════════════════════════════════

def _detect_encoding_info(raw: bytes) -> dict:
    """
    Detect encoding from raw bytes.

    Returns dict with: detected, confidence, is_utf8, suspicious_chars.
    """
    result     = chardet.detect(raw)
    detected   = result.get("encoding") or "unknown"
    confidence = round(result.get("confidence") or 0.0, 2)

    is_utf8 = detected.upper().replace("-", "") in ("UTF8", "ASCII", "UTF8SIG")

    suspicious: list[str] = []
    if not is_utf8:
        for row_idx, line in enumerate(raw.split(b"\n")[:100], start=1):
            try:
                line.decode("utf-8")
            except UnicodeDecodeError as e:
                bad_byte = line[e.start : e.end]
                suspicious.append(f"row {row_idx}: byte {bad_byte!r} at position {e.start}")

    return {
        "detected":         detected,
        "confidence":       confidence,
        "is_utf8":          is_utf8,
        "suspicious_chars": suspicious[:10],
    }


def _read_text_safely(raw: bytes, preferred_encoding: str) -> str:
    """
    Decode raw bytes line-by-line: UTF-8, then the detected encoding, then
    latin-1, finally CP1252 with replacement. Null bytes and a UTF-8 BOM are
    stripped.
    """
    decoded_lines: list[str] = []
    for raw_line in raw.split(b"\n"):
        decoded: str | None = None
        for enc in ("utf-8", preferred_encoding, "latin-1"):
            if not enc or enc == "unknown":
                continue
            try:
                decoded = raw_line.decode(enc)
                break
            except (LookupError, UnicodeDecodeError):
                continue
        if decoded is None:
            decoded = raw_line.decode("cp1252", errors="replace")
        decoded_lines.append(decoded.replace("\x00", ""))
    text = "\n".join(decoded_lines)
    return text.lstrip("\ufeff")


# ══════════════════════════════════════════════════════════════════════════════
# PUBLIC API
# ══════════════════════════════════════════════════════════════════════════════

def load_csv_table(path: "str | Path") -> dict:
    """Load a comma-separated table with every value kept as text."""
    path = Path(path)
    if not path.exists():
        raise MissingArtifactError("CSV table", path)

    raw      = path.read_bytes()
    enc_info = _detect_encoding_info(raw)
    enc      = enc_info["detected"] if enc_info["detected"] != "unknown" else "utf-8"
    text     = _read_text_safely(raw, enc)

    warnings: list[str] = []
    if enc_info["suspicious_chars"]:
        warnings.append(
            f"{path.name}: {len(enc_info['suspicious_chars'])} line(s) were not valid UTF-8 "
            f"and were decoded as {enc}"
        )

    try:
        df = pd.read_csv(
            io.StringIO(text),
            dtype=str,
            keep_default_na=False,
            sep=",",
            engine="python",
        )
    except (pd.errors.ParserError, pd.errors.EmptyDataError) as exc:
        raise ValueError(f"Could not parse CSV file {path}: {exc}") from exc

    for message in warnings:
        logger.warning(message)

    return {
        "dataframe":         df,
        "detected_encoding": enc,
        "encoding_info":     enc_info,
        "original_rows":     len(df) + 1,
        "original_columns":  len(df.columns),
        "warnings":          warnings,
    }


def write_csv_table(df: pd.DataFrame, path: "str | Path") -> Path:
    """Write ``df`` as UTF-8 CSV with minimal RFC4180 quoting and no index."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=False, quoting=csv.QUOTE_MINIMAL, encoding="utf-8", lineterminator="\n")
    return path
