"""
mapping.py — Column Mapping Resolver

Builds the persisted correspondence between the original CSV headers and the
columns the architect proposed in its ``<schema_design>`` block.

Correspondence is by POSITION. The architect is not guaranteed to echo the
original header names, so the n-th original column is paired with the n-th
schema definition and receives ``index = n + 1``. Surplus on either side gets
a synthetic entry so that every position 1..max(N, M) has exactly one entry:

    more originals than definitions  ->  name "UNMAPPED_<position>"
    more definitions than originals  ->  key  "MISSING_ORIGINAL_<position>"

Schema definition line (one per proposed column):

    [```EXCLUDE```|```UNIQUE```]name,type,description,example,^regex$

The regex runs from the last ",^" to the end of the line because the regex
itself may contain commas. The prefix is an ordinary quote-aware CSV record.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator

from sheet_stitcher.csv_line import parse_csv_line, split_lines
from sheet_stitcher.errors import (
    ContractError,
    CorrectionParseError,
    MissingArtifactError,
    SchemaExtractionError,
)
from sheet_stitcher.sections import (
    SCHEMA_DESIGN,
    SYNTHETIC_ID_COLUMN,
    USER_DATA,
    extract_section,
)

logger = logging.getLogger(__name__)

CATCH_ALL_REGEX = "^.*$"
SCHEMA_HEADER = "data_title,data_type,data_description,data_example,data_regex"
UNMAPPED_PREFIX = "UNMAPPED_"
MISSING_ORIGINAL_PREFIX = "MISSING_ORIGINAL_"

_MARKER_RE = re.compile(r"^(?:```(?P<fenced>EXCLUDE|UNIQUE)```|(?P<bare>EXCLUDE|UNIQUE)\s+)")

# JSON field name -> ColumnSpec attribute
_JSON_FIELDS = {
    "name": "name",
    "isExcluded": "is_excluded",
    "unique": "unique",
    "index": "index",
    "dataType": "data_type",
    "description": "description",
    "example": "example",
    "regex": "regex",
}


@dataclass(frozen=True)
class SchemaEntry:
    name: str
    data_type: str = ""
    description: str = ""
    example: str = ""
    regex: str = ""
    is_excluded: bool = False
    unique: bool = False


@dataclass(frozen=True)
class ColumnSpec:
    original_key: str
    name: str
    index: int
    data_type: str = ""
    description: str = ""
    example: str = ""
    regex: str = ""
    is_excluded: bool = False
    unique: bool = False

    @property
    def position(self) -> int:
        return self.index - 1

    @property
    def has_contract(self) -> bool:
        return bool(self.regex) and self.regex != CATCH_ALL_REGEX

    @property
    def is_synthetic(self) -> bool:
        return self.original_key.startswith(MISSING_ORIGINAL_PREFIX) or self.name.startswith(UNMAPPED_PREFIX)

    def to_json(self) -> dict[str, Any]:
        return {json_key: getattr(self, attr) for json_key, attr in _JSON_FIELDS.items()}


class ColumnMapping:
    """Read-only, index-ordered set of ColumnSpec entries keyed by original header."""

    def __init__(self, specs) -> None:
        ordered = sorted(specs, key=lambda spec: spec.index)
        indices = [spec.index for spec in ordered]
        if indices != list(range(1, len(ordered) + 1)):
            raise ContractError(
                f"Column mapping indices must be exactly 1..{len(ordered)}, got {indices}"
            )
        by_key: dict[str, ColumnSpec] = {}
        for spec in ordered:
            if spec.original_key in by_key:
                raise ContractError(f"Duplicate original column key in mapping: {spec.original_key!r}")
            by_key[spec.original_key] = spec
        self._specs = tuple(ordered)
        self._by_key = by_key

    def __iter__(self) -> Iterator[ColumnSpec]:
        return iter(self._specs)

    def __len__(self) -> int:
        return len(self._specs)

    def __contains__(self, original_key: object) -> bool:
        return original_key in self._by_key

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ColumnMapping):
            return NotImplemented
        return self._specs == other._specs

    def __repr__(self) -> str:
        return f"ColumnMapping({len(self)} columns)"

    def get(self, original_key: str) -> ColumnSpec | None:
        return self._by_key.get(original_key)

    def at_index(self, index: int) -> ColumnSpec | None:
        if 1 <= index <= len(self._specs):
            return self._specs[index - 1]
        return None

    def by_name(self, semantic_name: str) -> ColumnSpec | None:
        """First entry (lowest index) carrying this semantic name."""
        for spec in self._specs:
            if spec.name == semantic_name:
                return spec
        return None

    def position_of(self, semantic_name: str) -> int:
        spec = self.by_name(semantic_name)
        return spec.position if spec else -1

    def names(self) -> list[str]:
        return [spec.name for spec in self._specs]

    def excluded_names(self) -> list[str]:
        return [spec.name for spec in self._specs if spec.is_excluded]

    def contract_columns(self) -> list[ColumnSpec]:
        """Non-excluded columns that carry a real regex contract."""
        return [spec for spec in self._specs if not spec.is_excluded and spec.has_contract]

    # ── Persistence ───────────────────────────────────────────────────────

    def to_dict(self) -> dict[str, dict[str, Any]]:
        return {spec.original_key: spec.to_json() for spec in self._specs}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "ColumnMapping":
        if not isinstance(payload, dict) or not payload:
            raise ContractError("Column mapping must be a non-empty JSON object")
        specs = []
        for original_key, value in payload.items():
            if not isinstance(value, dict):
                raise ContractError(f"Mapping entry for {original_key!r} is not an object")
            missing = [key for key in ("name", "index") if key not in value]
            if missing:
                raise ContractError(
                    f"Mapping entry for {original_key!r} is missing: {', '.join(missing)}"
                )
            try:
                index = int(value["index"])
            except (TypeError, ValueError) as exc:
                raise ContractError(f"Mapping entry for {original_key!r} has a non-integer index") from exc
            specs.append(
                ColumnSpec(
                    original_key=str(original_key),
                    name=str(value["name"]),
                    index=index,
                    data_type=str(value.get("dataType") or ""),
                    description=str(value.get("description") or ""),
                    example=str(value.get("example") or ""),
                    regex=str(value.get("regex") or ""),
                    is_excluded=bool(value.get("isExcluded", False)),
                    unique=bool(value.get("unique", False)),
                )
            )
        return cls(specs)

    def save(self, path: "str | Path") -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_dict(), indent=2, ensure_ascii=False), encoding="utf-8")
        return path

    @classmethod
    def load(cls, path: "str | Path") -> "ColumnMapping":
        path = Path(path)
        if not path.exists():
            raise MissingArtifactError("column mapping", path)
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ContractError(f"Could not parse column mapping {path}: {exc}") from exc
        return cls.from_dict(payload)


# ══════════════════════════════════════════════════════════════════════════════
# SCHEMA BLOCK PARSING
# ══════════════════════════════════════════════════════════════════════════════

def split_regex_suffix(line: str) -> tuple[str, str]:
    """Split ``prefix,^regex`` at the last ",^"; no ",^" means no regex."""
    cut = line.rfind(",^")
    if cut < 0:
        return line, ""
    return line[:cut], line[cut + 1 :].strip()


def strip_schema_marker(line: str) -> tuple[str, str | None]:
    """Remove one leading EXCLUDE/UNIQUE marker; returns (rest, marker)."""
    match = _MARKER_RE.match(line)
    if match is None:
        return line, None
    marker = match.group("fenced") or match.group("bare")
    return line[match.end() :].lstrip(), marker


def parse_schema_line(line: str) -> SchemaEntry:
    body, marker = strip_schema_marker(line.strip())
    prefix, regex = split_regex_suffix(body)
    parts = parse_csv_line(prefix, strip=True)
    name = parts[0] if parts else ""
    if not name:
        raise CorrectionParseError("schema line has no column name", line=line)
    padded = parts + [""] * (4 - len(parts))
    return SchemaEntry(
        name=name,
        data_type=padded[1],
        description=padded[2],
        example=padded[3],
        regex=regex,
        is_excluded=marker == "EXCLUDE",
        unique=marker == "UNIQUE",
    )


def parse_schema_block(block: str) -> tuple[list[SchemaEntry], list[str]]:
    """Parse every definition line; unparseable lines are logged and skipped."""
    entries: list[SchemaEntry] = []
    warnings: list[str] = []
    for line_number, raw_line in enumerate(split_lines(block), start=1):
        line = raw_line.strip()
        if not line or line == SCHEMA_HEADER:
            continue
        try:
            entries.append(parse_schema_line(line))
        except CorrectionParseError as exc:
            excerpt = line[:50] + ("..." if len(line) > 50 else "")
            message = f"Could not parse schema line {line_number}: {excerpt} ({exc})"
            logger.warning(message)
            warnings.append(message)
    return entries, warnings


def parse_header_sample(user_data: str) -> list[str]:
    """Original headers from the first line of the user_data sample, ID stripped."""
    lines = [line for line in split_lines(user_data) if line.strip()]
    if not lines:
        return []
    headers = parse_csv_line(lines[0], strip=True)
    if headers and headers[0] == SYNTHETIC_ID_COLUMN:
        headers = headers[1:]
    return headers


# ══════════════════════════════════════════════════════════════════════════════
# MAPPING CONSTRUCTION
# ══════════════════════════════════════════════════════════════════════════════

def _spec_from_entry(original_key: str, entry: SchemaEntry, index: int) -> ColumnSpec:
    return ColumnSpec(
        original_key=original_key,
        name=entry.name,
        index=index,
        data_type=entry.data_type,
        description=entry.description,
        example=entry.example,
        regex=entry.regex,
        is_excluded=entry.is_excluded,
        unique=entry.unique,
    )


def build_column_mapping(original_headers: list[str], entries: list[SchemaEntry]) -> ColumnMapping:
    specs: list[ColumnSpec] = []
    seen: set[str] = set()
    total = max(len(original_headers), len(entries))

    for position in range(total):
        index = position + 1
        if position < len(original_headers):
            original_key = original_headers[position]
            if original_key in seen:
                deduped = f"{original_key}__{index}"
                logger.warning(
                    "Duplicate original header %r at position %d; keyed as %r",
                    original_key, index, deduped,
                )
                original_key = deduped
        else:
            original_key = f"{MISSING_ORIGINAL_PREFIX}{position}"
        seen.add(original_key)

        if position < len(entries):
            specs.append(_spec_from_entry(original_key, entries[position], index))
        else:
            specs.append(ColumnSpec(original_key=original_key, name=f"{UNMAPPED_PREFIX}{position}", index=index))

    if len(original_headers) != len(entries):
        logger.warning(
            "Header sample has %d columns but schema proposes %d; synthetic entries added",
            len(original_headers), len(entries),
        )
    return ColumnMapping(specs)


def resolve_column_mapping(text: str) -> ColumnMapping:
    """
    Build the mapping from an architect log holding ``<user_data>`` and
    ``<schema_design>``. Raises SchemaExtractionError rather than returning a
    partial mapping.
    """
    user_data = extract_section(text, USER_DATA, required=True)
    schema_design = extract_section(text, SCHEMA_DESIGN, required=True)

    original_headers = parse_header_sample(user_data)
    if not original_headers:
        raise SchemaExtractionError("No header line found in <user_data> section", section=USER_DATA)

    entries, _ = parse_schema_block(schema_design)
    if not entries:
        raise SchemaExtractionError(
            "No column definitions could be parsed from <schema_design> section",
            section=SCHEMA_DESIGN,
        )
    return build_column_mapping(original_headers, entries)


def create_column_mapping(log_path: "str | Path", mapping_path: "str | Path") -> ColumnMapping:
    log_path = Path(log_path)
    if not log_path.exists():
        raise MissingArtifactError("architect log", log_path)
    mapping = resolve_column_mapping(log_path.read_text(encoding="utf-8"))
    mapping.save(mapping_path)
    logger.info("Column mapping with %d entries written to %s", len(mapping), mapping_path)
    return mapping

