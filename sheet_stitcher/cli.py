from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any

import requests

from sheet_stitcher import __version__ as TOOL_VERSION
from sheet_stitcher.client import AIServiceClient
from sheet_stitcher.config import StitchConfig
from sheet_stitcher.contracts import build_run_summary, wrap_payload
from sheet_stitcher.errors import ContractError, StitchError
from sheet_stitcher.loader import load_csv_table
from sheet_stitcher.mapping import ColumnMapping, create_column_mapping
from sheet_stitcher.pipeline import run_architect, run_cleaner
from sheet_stitcher.preclean import run_preclean
from sheet_stitcher.stitcher import drop_synthetic_id_column, run_stitch
from sheet_stitcher.validator import validate_dataset

EXIT_SUCCESS = 0
EXIT_COMMAND_ERROR = 1
EXIT_PARSE_FAILED = 2
EXIT_FLAGGED = 3

DEFAULT_CONFIG_NAME = "sheet-stitcher.json"
LOG_FORMAT = "%(levelname)s %(name)s: %(message)s"

logger = logging.getLogger(__name__)


class CliError(Exception):
    def __init__(self, message: str, code: int = EXIT_COMMAND_ERROR) -> None:
        super().__init__(message)
        self.code = code


class SheetStitcherArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:
        raise CliError(message, EXIT_COMMAND_ERROR)


def eprint(message: str) -> None:
    print(message, file=sys.stderr)


def emit_human(message: str, *, quiet: bool = False) -> None:
    if not quiet:
        eprint(message)


def json_dumps(payload: Any) -> str:
    return json.dumps(payload, indent=2, ensure_ascii=False, sort_keys=True)


def ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def write_text(path: Path, payload: str) -> None:
    ensure_parent(path)
    path.write_text(payload, encoding="utf-8")


def write_json(path: Path, payload: Any) -> None:
    write_text(path, json_dumps(payload))


def maybe_emit_json_stdout(payload: Any, enabled: bool) -> None:
    if enabled:
        print(json_dumps(payload))


def configure_logging(*, quiet: bool = False, verbose: bool = False) -> None:
    level = logging.INFO
    if quiet:
        level = logging.WARNING
    if verbose:
        level = logging.DEBUG
    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stderr, force=True)


def classify_exception(exc: Exception) -> int:
    if isinstance(exc, CliError):
        return exc.code
    if isinstance(exc, ContractError):
        return EXIT_PARSE_FAILED
    if isinstance(exc, (UnicodeDecodeError, ValueError)):
        return EXIT_PARSE_FAILED
    return EXIT_COMMAND_ERROR


def resolve_config(args: argparse.Namespace) -> StitchConfig:
    if getattr(args, "config", None):
        return StitchConfig.load(Path(args.config))
    return StitchConfig(base_dir=Path(getattr(args, "base_dir", None) or "."))


# ══════════════════════════════════════════════════════════════════════════════
# TEXT RENDERING
# ══════════════════════════════════════════════════════════════════════════════

def render_map_text(mapping: ColumnMapping, output_path: Path) -> str:
    lines = [
        "sheet-stitcher map",
        f"Mapping: {output_path}",
        f"Columns: {len(mapping)}",
    ]
    for spec in mapping:
        flags = []
        if spec.is_excluded:
            flags.append("excluded")
        if spec.unique:
            flags.append("unique")
        suffix = f" [{', '.join(flags)}]" if flags else ""
        lines.append(f"- {spec.index}: {spec.original_key} -> {spec.name}{suffix}")
    return "\n".join(lines) + "\n"


def render_stitch_summary(payload: dict[str, Any]) -> str:
    metrics = payload["metrics"]
    lines = [
        "sheet-stitcher stitch",
        f"Input: {payload['input']}",
        f"Output: {payload['output']}",
        f"Rows: {metrics['rows']}",
        f"Rows updated from architect: {metrics['rows_updated']}",
        f"Change records: {metrics['change_records']}",
        f"Applied changes: {metrics['applied_changes']}",
        f"Flagged cells: {metrics['flagged_cells']}",
        f"Dropped corrections: {metrics['dropped_corrections']}",
    ]
    if payload["validation_delta"]:
        lines.append("Validation delta:")
        for name, delta in sorted(payload["validation_delta"].items()):
            lines.append(f"- {name}: {delta:+.2f}%")
    if payload["warnings"]:
        lines.append(f"Warnings: {len(payload['warnings'])}")
    return "\n".join(lines) + "\n"


def render_validate_text(payload: dict[str, Any]) -> str:
    lines = [
        "sheet-stitcher validate",
        f"Input: {payload['input']}",
        f"Valid: {payload['valid']}",
        f"Invalid cells: {payload['invalid_count']}",
    ]
    for name, column in sorted(payload["columns"].items()):
        degraded = " (regex invalid, not enforced)" if column["degraded"] else ""
        lines.append(
            f"- {name}: {column['valid_count']}/{column['total_count']} valid "
            f"({column['valid_percentage']:.2f}%){degraded}"
        )
    return "\n".join(lines) + "\n"


def render_preclean_summary(summary: dict[str, Any]) -> str:
    lines = [
        "sheet-stitcher preclean",
        f"Input: {summary['input_file']}",
        f"Output: {summary['output_file']}",
        f"Rows: {summary['rows']}",
        f"Columns: {summary['columns']}",
        f"Values cleaned: {summary['total_changed']}",
    ]
    if summary["removed_columns"]:
        lines.append(f"Removed columns: {', '.join(summary['removed_columns'])}")
    if summary["warnings"]:
        lines.append(f"Warnings: {len(summary['warnings'])}")
    return "\n".join(lines) + "\n"


def render_clean_summary(summary: dict[str, Any]) -> str:
    lines = ["sheet-stitcher clean"]
    for key in ("processed", "already_valid", "catch_all", "excluded", "failed"):
        names = summary[key]
        lines.append(f"{key.replace('_', ' ').capitalize()}: {len(names)}" + (f" ({', '.join(names)})" if names else ""))
    return "\n".join(lines) + "\n"


# ══════════════════════════════════════════════════════════════════════════════
# PARSER
# ══════════════════════════════════════════════════════════════════════════════

def _add_common(parser: argparse.ArgumentParser, *, with_json: bool = True) -> None:
    parser.add_argument("--config", help="JSON config file (see `config init`)")
    parser.add_argument("--base-dir", dest="base_dir", help="Project root when no --config is given (default: .)")
    if with_json:
        parser.add_argument("--json", action="store_true", help="Write machine JSON to stdout")
    parser.add_argument("-q", "--quiet", action="store_true", help="Minimal human logs")
    parser.add_argument("-v", "--verbose", action="store_true", help="More human logs")


def build_parser() -> argparse.ArgumentParser:
    parser = SheetStitcherArgumentParser(
        prog="sheet-stitcher",
        description="Reconcile AI schema and value corrections into one consistent CSV.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    map_cmd = subparsers.add_parser("map", help="Build the column mapping from the architect log.")
    map_cmd.add_argument("--log", help="Architect log path (default: outputs/architect_log.txt)")
    map_cmd.add_argument("--output", help="Column mapping output path (default: outputs/column_mapping.json)")
    _add_common(map_cmd)

    stitch = subparsers.add_parser("stitch", help="Apply all corrections and write the stitched CSV.")
    stitch.add_argument("--workbook", help="Also write an .xlsx workbook to this file name under outputs/")
    stitch.add_argument("--drop-excluded", dest="drop_excluded", action="store_true", help="Leave EXCLUDE columns out of the stitched CSV")
    stitch.add_argument("--fail-on-flagged", dest="fail_on_flagged", action="store_true", help="Return exit code 3 when flagged cells remain")
    _add_common(stitch)

    validate = subparsers.add_parser("validate", help="Check a CSV against the regex contracts in a column mapping.")
    validate.add_argument("input", help="CSV file to validate")
    validate.add_argument("--mapping", help="Column mapping path (default: outputs/column_mapping.json)")
    validate.add_argument("--output", help="Write the validation payload to this path")
    validate.add_argument("--fail-on-invalid", dest="fail_on_invalid", action="store_true", help="Return exit code 3 when invalid cells exist")
    _add_common(validate)

    architect = subparsers.add_parser("architect", help="Send a data sample to the AI architect.")
    architect.add_argument("--instructions", help="Extra instructions passed to the architect")
    architect.add_argument("--model", help="Model identifier passed to the AI service")
    _add_common(architect, with_json=False)

    clean = subparsers.add_parser("clean", help="Send invalid values of each column to the AI cleaner.")
    clean.add_argument("--model", help="Model identifier passed to the AI service")
    _add_common(clean)

    preclean = subparsers.add_parser("preclean", help="Clean the raw CSV into the base table.")
    preclean.add_argument("--input", help="Raw CSV path (default: data/data.csv)")
    preclean.add_argument("--output", help="Cleaned CSV path (default: data/data_cleaned.csv)")
    preclean.add_argument("--exclude", help="Exclude-columns file (default: settings/exclude_columns.txt)")
    _add_common(preclean)

    run = subparsers.add_parser("run", help="Run preclean, architect, cleaner and stitch in order.")
    run.add_argument("--input", help="Raw CSV path for the preclean stage (default: data/data.csv)")
    run.add_argument("--sample-size", dest="sample_size", type=int, help="Rows sent to the architect")
    run.add_argument("--instructions", help="Extra instructions passed to the architect")
    run.add_argument("--model", help="Model identifier for both AI stages")
    run.add_argument("--model-architect", dest="model_architect", help="Model identifier for the architect (overrides --model)")
    run.add_argument("--model-cleaner", dest="model_cleaner", help="Model identifier for the cleaner (overrides --model)")
    run.add_argument("--skip-preclean", dest="skip_preclean", action="store_true", help="Use the existing data/data_cleaned.csv")
    run.add_argument("--skip-architect", dest="skip_architect", action="store_true", help="Rebuild the mapping from the existing architect log")
    run.add_argument("--skip-cleaner", dest="skip_cleaner", action="store_true", help="Use the existing cleaner outputs")
    run.add_argument("--workbook", help="Also write an .xlsx workbook to this file name under outputs/")
    run.add_argument("--drop-excluded", dest="drop_excluded", action="store_true", help="Leave EXCLUDE columns out of the stitched CSV")
    run.add_argument("--fail-on-flagged", dest="fail_on_flagged", action="store_true", help="Return exit code 3 when flagged cells remain")
    _add_common(run)

    config = subparsers.add_parser("config", help="Generate configuration.")
    config_subparsers = config.add_subparsers(dest="config_command", required=True)
    config_init = config_subparsers.add_parser("init", help="Write a starter config file.")
    config_init.add_argument("--path", default=DEFAULT_CONFIG_NAME, help="Config output path")

    subparsers.add_parser("version", help="Print version")
    return parser


# ══════════════════════════════════════════════════════════════════════════════
# COMMANDS
# ══════════════════════════════════════════════════════════════════════════════

def run_map(args: argparse.Namespace) -> int:
    config = resolve_config(args)
    log_path = Path(args.log) if args.log else config.architect_log_path
    output_path = Path(args.output) if args.output else config.column_mapping_path
    mapping = create_column_mapping(log_path, output_path)
    if args.json:
        run_summary = build_run_summary(
            stage="map",
            input_path=log_path,
            output_path=output_path,
            metrics={"columns": len(mapping), "excluded": len(mapping.excluded_names())},
        )
        maybe_emit_json_stdout(wrap_payload("stitcher.column_mapping", {"mapping": mapping.to_dict()}, run_summary), True)
    else:
        emit_human(render_map_text(mapping, output_path).rstrip(), quiet=args.quiet)
    return EXIT_SUCCESS


def _with_stitch_overrides(config: StitchConfig, args: argparse.Namespace) -> StitchConfig:
    overrides: dict[str, Any] = {}
    if args.workbook:
        overrides["stitched_workbook_file"] = args.workbook
    if args.drop_excluded:
        overrides["drop_excluded_columns"] = True
    return replace(config, **overrides) if overrides else config


def _stitch_payload(config: StitchConfig, result) -> dict[str, Any]:
    return {
        "tool": "sheet-stitcher",
        "command": "stitch",
        "version": TOOL_VERSION,
        "input": str(config.base_table_path()),
        "output": str(config.stitched_csv_path),
        "change_ledger": str(config.change_ledger_path),
        "validation_summary": str(config.validation_summary_path),
        "workbook": str(config.stitched_workbook_path) if config.stitched_workbook_path else None,
        "metrics": result.metrics(),
        "validation_delta": result.validation_delta(),
        "warnings": result.warnings,
    }


def run_stitch_command(args: argparse.Namespace) -> int:
    config = _with_stitch_overrides(resolve_config(args), args)
    result = run_stitch(config)
    payload = _stitch_payload(config, result)
    if args.json:
        maybe_emit_json_stdout(payload, True)
    else:
        emit_human(render_stitch_summary(payload).rstrip(), quiet=args.quiet)
    if args.fail_on_flagged and result.flagged_count:
        return EXIT_FLAGGED
    return EXIT_SUCCESS


def run_validate(args: argparse.Namespace) -> int:
    input_path = Path(args.input)
    if not input_path.exists():
        eprint(f"File not found: {input_path}")
        return EXIT_COMMAND_ERROR

    config = resolve_config(args)
    mapping = ColumnMapping.load(Path(args.mapping) if args.mapping else config.column_mapping_path)
    loaded = load_csv_table(input_path)
    df = drop_synthetic_id_column(loaded["dataframe"], mapping)
    results = validate_dataset(df, mapping)
    invalid_count = sum(result.invalid_count for result in results.values())
    payload = {
        "tool": "sheet-stitcher",
        "command": "validate",
        "version": TOOL_VERSION,
        "input": str(input_path),
        "valid": invalid_count == 0,
        "invalid_count": invalid_count,
        "columns": {name: result.to_dict() for name, result in results.items()},
        "warnings": loaded["warnings"],
    }
    if args.output:
        write_json(Path(args.output), payload)
        emit_human(f"Validation report: {args.output}", quiet=args.quiet)
    if args.json:
        maybe_emit_json_stdout(payload, True)
    else:
        emit_human(render_validate_text(payload).rstrip(), quiet=args.quiet)
    if args.fail_on_invalid and invalid_count:
        return EXIT_FLAGGED
    return EXIT_SUCCESS


def _client_for(config: StitchConfig) -> AIServiceClient:
    if not config.api_base_url:
        raise CliError("api_base_url is not set in the config file.", EXIT_COMMAND_ERROR)
    return AIServiceClient.from_config(config)


def run_architect_command(args: argparse.Namespace) -> int:
    config = resolve_config(args)
    mapping = run_architect(config, _client_for(config), custom_instructions=args.instructions, model=args.model)
    emit_human(render_map_text(mapping, config.column_mapping_path).rstrip(), quiet=args.quiet)
    return EXIT_SUCCESS


def run_clean_command(args: argparse.Namespace) -> int:
    config = resolve_config(args)
    summary = run_cleaner(config, _client_for(config), model=args.model)
    if args.json:
        maybe_emit_json_stdout(summary, True)
    else:
        emit_human(render_clean_summary(summary).rstrip(), quiet=args.quiet)
    return EXIT_COMMAND_ERROR if summary["failed"] else EXIT_SUCCESS


def run_preclean_command(args: argparse.Namespace) -> int:
    config = resolve_config(args)
    summary = run_preclean(config, input_path=args.input, output_path=args.output, exclude_path=args.exclude)
    if args.json:
        run_summary = build_run_summary(
            stage="preclean",
            input_path=Path(summary["input_file"]),
            output_path=Path(summary["output_file"]),
            metrics={key: summary[key] for key in ("rows", "columns", "total_changed")},
            warnings=summary["warnings"],
        )
        maybe_emit_json_stdout(wrap_payload("stitcher.preclean_summary", summary, run_summary), True)
    else:
        emit_human(render_preclean_summary(summary).rstrip(), quiet=args.quiet)
    return EXIT_SUCCESS


def _run_stage(name: str, stages: dict[str, Any], func, *func_args, **func_kwargs) -> Any:
    logger.info("Stage %s: starting", name)
    result = func(*func_args, **func_kwargs)
    stages[name] = {"status": "ok"}
    return result


def run_pipeline_command(args: argparse.Namespace) -> int:
    config = resolve_config(args)
    if args.sample_size:
        config = replace(config, sample_size=args.sample_size)
    config = _with_stitch_overrides(config, args)

    stages: dict[str, Any] = {}
    payload: dict[str, Any] = {
        "tool": "sheet-stitcher",
        "command": "run",
        "version": TOOL_VERSION,
        "stages": stages,
        "failed_stage": None,
    }
    stage = "preclean"
    try:
        if args.skip_preclean:
            stages[stage] = {"status": "skipped"}
        else:
            summary = _run_stage(stage, stages, run_preclean, config, input_path=args.input)
            stages[stage]["values_cleaned"] = summary["total_changed"]
            stages[stage]["removed_columns"] = summary["removed_columns"]

        client = None
        if args.skip_architect:
            stage = "map"
            mapping = _run_stage(stage, stages, create_column_mapping, config.architect_log_path, config.column_mapping_path)
        else:
            stage = "architect"
            client = _client_for(config)
            mapping = _run_stage(
                stage, stages, run_architect, config, client,
                custom_instructions=args.instructions,
                model=args.model_architect or args.model,
            )
        stages[stage]["columns"] = len(mapping)

        cleaner_failed: list[str] = []
        stage = "cleaner"
        if args.skip_cleaner:
            stages[stage] = {"status": "skipped"}
        else:
            client = client or _client_for(config)
            summary = _run_stage(stage, stages, run_cleaner, config, client, model=args.model_cleaner or args.model)
            cleaner_failed = summary["failed"]
            stages[stage].update({key: summary[key] for key in ("processed", "failed")})
            if cleaner_failed:
                stages[stage]["status"] = "partial"
                logger.warning("Cleaner failed for %d column(s); stitching what exists", len(cleaner_failed))

        stage = "stitch"
        result = _run_stage(stage, stages, run_stitch, config)
    except (CliError, StitchError, ValueError, OSError, requests.RequestException) as exc:
        logger.error("Stage %s failed", stage)
        eprint(f"Stage {stage} failed: {exc}")
        stages[stage] = {"status": "failed", "error": str(exc)}
        payload["failed_stage"] = stage
        maybe_emit_json_stdout(payload, args.json)
        return classify_exception(exc)

    stitch_payload = _stitch_payload(config, result)
    stages["stitch"]["output"] = stitch_payload["output"]
    payload.update({key: stitch_payload[key] for key in ("metrics", "validation_delta", "warnings")})
    if args.json:
        maybe_emit_json_stdout(payload, True)
    else:
        emit_human(render_stitch_summary(stitch_payload).rstrip(), quiet=args.quiet)

    if cleaner_failed:
        return EXIT_COMMAND_ERROR
    if args.fail_on_flagged and result.flagged_count:
        return EXIT_FLAGGED
    return EXIT_SUCCESS


def run_config_init(args: argparse.Namespace) -> int:
    config_path = Path(args.path)
    if config_path.exists():
        eprint(f"Refusing to overwrite existing config: {config_path}")
        return EXIT_COMMAND_ERROR
    write_json(config_path, StitchConfig().to_dict())
    emit_human(f"Config written: {config_path}")
    return EXIT_SUCCESS


def run_version() -> int:
    print(TOOL_VERSION)
    return EXIT_SUCCESS


COMMANDS = {
    "map": run_map,
    "stitch": run_stitch_command,
    "validate": run_validate,
    "architect": run_architect_command,
    "clean": run_clean_command,
    "preclean": run_preclean_command,
    "run": run_pipeline_command,
}


def main(argv: list[str] | None = None) -> int:
    try:
        parser = build_parser()
        args = parser.parse_args(argv)
        if args.command == "config":
            if args.config_command == "init":
                return run_config_init(args)
        if args.command == "version":
            return run_version()
        handler = COMMANDS.get(args.command)
        if handler is None:
            raise CliError(f"Unknown command: {args.command}", EXIT_COMMAND_ERROR)
        configure_logging(quiet=args.quiet, verbose=args.verbose)
        try:
            return handler(args)
        except (StitchError, ValueError, OSError, requests.RequestException) as exc:
            eprint(str(exc))
            return classify_exception(exc)
    except CliError as exc:
        eprint(str(exc))
        return exc.code


if __name__ == "__main__":
    raise SystemExit(main())
