"""Shared versioned contracts for persisted sheet-stitcher outputs."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any

CONTRACT_VERSIONS = {
    "stitcher.column_mapping": "1.0.0",
    "stitcher.change_ledger": "1.0.0",
    "stitcher.validation_summary": "1.0.0",
    "stitcher.preclean_summary": "1.0.0",
}


def utc_now_iso() -> str:
    """Second-precision UTC timestamp, e.g. ``2024-05-01T09:30:00Z``."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def build_run_summary(
    *,
    stage: str,
    input_path: Path,
    status: str = "ok",
    output_path: Path | None = None,
    metrics: dict[str, Any] | None = None,
    warnings: list[str] | None = None,
) -> dict[str, Any]:
    return {
        "tool": "sheet-stitcher",
        "stage": stage,
        "status": status,
        "generated_at": utc_now_iso(),
        "input_file": str(input_path),
        "output_file": str(output_path) if output_path else None,
        "warnings_count": len(warnings or []),
        "warnings": list(warnings or []),
        "metrics": metrics or {},
    }


def wrap_payload(name: str, payload: dict[str, Any], run_summary: dict[str, Any]) -> dict[str, Any]:
    """Prefix ``payload`` with its contract name and version; unknown names raise KeyError."""
    version = CONTRACT_VERSIONS[name]
    return {
        "contract": {"name": name, "version": version},
        "schema_version": version,
        "run_summary": run_summary,
        **payload,
    }
