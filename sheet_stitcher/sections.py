"""Tagged blocks inside AI responses and the sample sent to the architect."""

from __future__ import annotations

import re

import pandas as pd

from sheet_stitcher.csv_line import format_csv_line
from sheet_stitcher.errors import SchemaExtractionError

SCHEMA_DESIGN = "schema_design"
SEMANTIC_DIFF = "semantic_diff"
USER_DATA = "user_data"

SYNTHETIC_ID_COLUMN = "ID"


def _section_pattern(tag: str) -> re.Pattern:
    return re.compile(rf"<{re.escape(tag)}>(.*?)</{re.escape(tag)}>", re.DOTALL)


def extract_section(text: str, tag: str, *, required: bool = False) -> str | None:
    """
    Return the trimmed content of the first ``<tag>...</tag>`` block.

    Missing blocks return None, or raise SchemaExtractionError naming the
    tag when ``required`` is set.
    """
    match = _section_pattern(tag).search(text or "")
    if match is None:
        if required:
            raise SchemaExtractionError(
                f"Could not find <{tag}> section in AI response",
                section=tag,
            )
        return None
    return match.group(1).strip()


def build_user_data_sample(df: pd.DataFrame, sample_size: int) -> str:
    """First ``sample_size`` rows as CSV text with a 1-based ID column prepended."""
    sample_size = max(0, min(int(sample_size), len(df)))
    headers = [SYNTHETIC_ID_COLUMN, *[str(column) for column in df.columns]]
    lines = [format_csv_line(headers)]
    for position in range(sample_size):
        row = df.iloc[position]
        values = ["" if pd.isna(value) else str(value) for value in row.tolist()]
        lines.append(format_csv_line([str(position + 1), *values]))
    return "\n".join(lines) + "\n"


def build_architect_log(user_data: str, response_text: str) -> str:
    """The persisted log from which the column mapping is derived."""
    return "\n".join(
        [
            "=== USER DATA ===",
            f"<{USER_DATA}>",
            user_data.rstrip("\n"),
            f"</{USER_DATA}>",
            "",
            "=== AI RESPONSE ===",
            response_text,
        ]
    )
