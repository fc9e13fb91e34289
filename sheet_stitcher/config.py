"""
config.py — Explicit run configuration for sheet-stitcher

Every stage receives a StitchConfig instance. Nothing reads the process
environment or searches the filesystem for settings; the CLI builds the
config from ``--config`` (a JSON file) or from defaults rooted at a base
directory.

Layout with defaults, relative to ``base_dir``:

    data/data.csv                               raw input, never modified
    settings/exclude_columns.txt                columns dropped by preclean
    data/data_cleaned.csv                       base table
    data/data_deduped.csv                       preferred base table when present
    data/data_stitched.csv                      reconciled output
    outputs/architect_output.txt                AI schema response
    outputs/architect_log.txt                   user_data sample + AI response
    outputs/column_mapping.json                 persisted ColumnMapping
    outputs/cleaned_columns/outputs/*_output.txt  per-column AI responses
    outputs/change_ledger.json
    outputs/validation_summary.json
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

from sheet_stitcher.errors import ContractError


@dataclass(frozen=True)
class StitchConfig:
    base_dir: Path = Path(".")
    data_dir: str = "data"
    outputs_dir: str = "outputs"
    settings_dir: str = "settings"
    data_raw_file: str = "data.csv"
    exclude_columns_file: str = "exclude_columns.txt"
    data_cleaned_file: str = "data_cleaned.csv"
    data_deduped_file: str = "data_deduped.csv"
    data_stitched_file: str = "data_stitched.csv"
    architect_output_file: str = "architect_output.txt"
    architect_log_file: str = "architect_log.txt"
    column_mapping_file: str = "column_mapping.json"
    cleaned_columns_dir: str = "cleaned_columns"
    change_ledger_file: str = "change_ledger.json"
    validation_summary_file: str = "validation_summary.json"
    stitched_workbook_file: str | None = None
    drop_excluded_columns: bool = False
    sample_size: int = 5
    api_base_url: str = ""
    api_email: str | None = None
    api_key: str | None = None
    column_delay_seconds: float = 1.0

    # ── Derived paths ─────────────────────────────────────────────────────

    @property
    def data_path(self) -> Path:
        return Path(self.base_dir) / self.data_dir

    @property
    def outputs_path(self) -> Path:
        return Path(self.base_dir) / self.outputs_dir

    @property
    def raw_csv_path(self) -> Path:
        return self.data_path / self.data_raw_file

    @property
    def exclude_columns_path(self) -> Path:
        return Path(self.base_dir) / self.settings_dir / self.exclude_columns_file

    @property
    def cleaned_csv_path(self) -> Path:
        return self.data_path / self.data_cleaned_file

    @property
    def deduped_csv_path(self) -> Path:
        return self.data_path / self.data_deduped_file

    @property
    def stitched_csv_path(self) -> Path:
        return self.data_path / self.data_stitched_file

    @property
    def architect_output_path(self) -> Path:
        return self.outputs_path / self.architect_output_file

    @property
    def architect_log_path(self) -> Path:
        return self.outputs_path / self.architect_log_file

    @property
    def column_mapping_path(self) -> Path:
        return self.outputs_path / self.column_mapping_file

    @property
    def cleaner_outputs_path(self) -> Path:
        return self.outputs_path / self.cleaned_columns_dir / "outputs"

    @property
    def cleaner_logs_path(self) -> Path:
        return self.outputs_path / self.cleaned_columns_dir / "logs"

    @property
    def change_ledger_path(self) -> Path:
        return self.outputs_path / self.change_ledger_file

    @property
    def validation_summary_path(self) -> Path:
        return self.outputs_path / self.validation_summary_file

    @property
    def stitched_workbook_path(self) -> Path | None:
        if not self.stitched_workbook_file:
            return None
        return self.outputs_path / self.stitched_workbook_file

    def base_table_path(self) -> Path:
        """Deduplicated table when the dedupe stage produced one, else the cleaned table."""
        if self.deduped_csv_path.exists():
            return self.deduped_csv_path
        return self.cleaned_csv_path

    # ── Serialisation ─────────────────────────────────────────────────────

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["base_dir"] = str(self.base_dir)
        # credentials never leave the process through a written config
        payload["api_key"] = None
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any], *, base_dir: Path | None = None) -> "StitchConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(payload) - known)
        if unknown:
            raise ContractError(f"Unknown config keys: {', '.join(unknown)}")
        values = dict(payload)
        if base_dir is not None:
            values["base_dir"] = base_dir
        values["base_dir"] = Path(values.get("base_dir", "."))
        return cls(**values)

    @classmethod
    def load(cls, path: "str | Path") -> "StitchConfig":
        """
        Read a JSON config file.

        A relative ``base_dir`` in the file is resolved against the config
        file's own directory; a missing ``base_dir`` means that directory.
        """
        path = Path(path)
        if not path.exists():
            raise ContractError(f"Config not found: {path}")
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ContractError(f"Could not read config {path}: {exc}") from exc
        if not isinstance(payload, dict):
            raise ContractError("Config root must be a JSON object.")
        base_dir = Path(payload.pop("base_dir", "."))
        if not base_dir.is_absolute():
            base_dir = path.parent / base_dir
        return cls.from_dict(payload, base_dir=base_dir)
