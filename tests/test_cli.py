from __future__ import annotations

import contextlib
import io
import json
import shutil
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import requests

from sheet_stitcher.cli import main
from sheet_stitcher.mapping import create_column_mapping

ROOT = Path(__file__).resolve().parents[1]
CLI = [sys.executable, "-m", "sheet_stitcher.cli"]
DEMO_DIR = ROOT / "sample-data" / "stitch-demo"


def run_cli(*args: str) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        [*CLI, *args],
        cwd=ROOT,
        capture_output=True,
        text=True,
    )


class SheetStitcherCliTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.base = Path(self._tmp.name) / "run"
        shutil.copytree(DEMO_DIR, self.base)

    def tearDown(self):
        self._tmp.cleanup()

    def test_version_prints_package_version(self):
        proc = run_cli("version")
        self.assertEqual(proc.returncode, 0, proc.stderr)
        self.assertEqual(proc.stdout.strip(), "0.1.0")

    def test_unknown_command_returns_exit_1(self):
        proc = run_cli("explode")
        self.assertEqual(proc.returncode, 1)

    def test_map_then_stitch_with_base_dir(self):
        proc = run_cli("map", "--base-dir", str(self.base))
        self.assertEqual(proc.returncode, 0, proc.stderr)
        self.assertIn("2: Phone -> phone", proc.stderr)
        self.assertTrue((self.base / "outputs" / "column_mapping.json").exists())

        proc = run_cli("stitch", "--base-dir", str(self.base), "--json", "-q")
        self.assertEqual(proc.returncode, 0, proc.stderr)
        payload = json.loads(proc.stdout)
        self.assertEqual(payload["metrics"]["flagged_cells"], 1)
        self.assertEqual(payload["metrics"]["applied_changes"], 1)
        self.assertTrue((self.base / "data" / "data_stitched.csv").exists())

    def test_fail_on_flagged_returns_exit_3(self):
        run_cli("map", "--base-dir", str(self.base), "-q")
        proc = run_cli("stitch", "--base-dir", str(self.base), "--fail-on-flagged", "-q")
        self.assertEqual(proc.returncode, 3, proc.stderr)

    def test_map_json_emits_versioned_contract(self):
        proc = run_cli("map", "--base-dir", str(self.base), "--json", "-q")
        self.assertEqual(proc.returncode, 0, proc.stderr)
        payload = json.loads(proc.stdout)
        self.assertEqual(payload["contract"]["name"], "stitcher.column_mapping")
        self.assertEqual(payload["mapping"]["Email"]["name"], "email")
        self.assertTrue(payload["mapping"]["Email"]["unique"])

    def test_stitch_without_mapping_returns_exit_2_naming_artifact(self):
        proc = run_cli("stitch", "--base-dir", str(self.base))
        self.assertEqual(proc.returncode, 2)
        self.assertIn("column mapping", proc.stderr)

    def test_validate_reports_invalid_cells(self):
        run_cli("map", "--base-dir", str(self.base), "-q")
        csv_path = self.base / "data" / "data_cleaned.csv"
        proc = run_cli("validate", str(csv_path), "--base-dir", str(self.base), "--json", "-q")
        self.assertEqual(proc.returncode, 0, proc.stderr)
        payload = json.loads(proc.stdout)
        self.assertFalse(payload["valid"])
        self.assertEqual(payload["invalid_count"], 2)

        proc = run_cli("validate", str(csv_path), "--base-dir", str(self.base), "--fail-on-invalid", "-q")
        self.assertEqual(proc.returncode, 3)

    def test_config_init_writes_loadable_config_and_refuses_overwrite(self):
        config_path = self.base / "sheet-stitcher.json"
        proc = run_cli("config", "init", "--path", str(config_path))
        self.assertEqual(proc.returncode, 0, proc.stderr)
        payload = json.loads(config_path.read_text(encoding="utf-8"))
        self.assertEqual(payload["data_dir"], "data")

        proc = run_cli("map", "--config", str(config_path), "-q")
        self.assertEqual(proc.returncode, 0, proc.stderr)
        self.assertTrue((self.base / "outputs" / "column_mapping.json").exists())

        proc = run_cli("config", "init", "--path", str(config_path))
        self.assertEqual(proc.returncode, 1)
        self.assertIn("Refusing to overwrite", proc.stderr)

    def test_clean_without_api_url_is_a_command_error(self):
        run_cli("map", "--base-dir", str(self.base), "-q")
        proc = run_cli("clean", "--base-dir", str(self.base))
        self.assertEqual(proc.returncode, 1)
        self.assertIn("api_base_url", proc.stderr)

    def _write_raw_csv(self):
        raw = "Name,Phone,Email\nAlice,555–1234,alice@example.com\nBob,+15559876543,bob@example\nCarol,,carol@example.com\n"
        (self.base / "data" / "data.csv").write_text(raw, encoding="utf-8")

    def test_preclean_writes_base_table(self):
        self._write_raw_csv()
        (self.base / "data" / "data_cleaned.csv").unlink()
        proc = run_cli("preclean", "--base-dir", str(self.base), "--json", "-q")
        self.assertEqual(proc.returncode, 0, proc.stderr)
        payload = json.loads(proc.stdout)
        self.assertEqual(payload["total_changed"], 1)
        self.assertEqual(payload["contract"]["name"], "stitcher.preclean_summary")
        self.assertEqual(payload["run_summary"]["stage"], "preclean")
        cleaned = (self.base / "data" / "data_cleaned.csv").read_text(encoding="utf-8")
        self.assertIn("Alice,555-1234,alice@example.com", cleaned)

    def test_preclean_refuses_to_overwrite_input(self):
        self._write_raw_csv()
        raw_path = self.base / "data" / "data.csv"
        proc = run_cli("preclean", "--base-dir", str(self.base), "--output", str(raw_path))
        self.assertEqual(proc.returncode, 2)
        self.assertIn("Refusing to overwrite", proc.stderr)
        self.assertIn("–", raw_path.read_text(encoding="utf-8"))

    def test_run_without_ai_stages_precleans_maps_and_stitches(self):
        self._write_raw_csv()
        proc = run_cli("run", "--base-dir", str(self.base), "--skip-architect", "--skip-cleaner", "--json", "-q")
        self.assertEqual(proc.returncode, 0, proc.stderr)
        payload = json.loads(proc.stdout)
        self.assertIsNone(payload["failed_stage"])
        self.assertEqual(set(payload["stages"]), {"preclean", "map", "cleaner", "stitch"})
        self.assertEqual(payload["stages"]["preclean"]["values_cleaned"], 1)
        self.assertEqual(payload["stages"]["map"]["columns"], 3)
        self.assertEqual(payload["stages"]["cleaner"]["status"], "skipped")
        self.assertEqual(payload["metrics"]["flagged_cells"], 1)
        self.assertEqual(payload["metrics"]["applied_changes"], 1)
        self.assertTrue((self.base / "data" / "data_stitched.csv").exists())

    def test_run_stops_at_the_first_failing_stage(self):
        proc = run_cli("run", "--base-dir", str(self.base), "--skip-architect", "--skip-cleaner", "--json")
        self.assertEqual(proc.returncode, 2)
        self.assertIn("Stage preclean failed", proc.stderr)
        self.assertIn("raw CSV", proc.stderr)
        payload = json.loads(proc.stdout)
        self.assertEqual(payload["failed_stage"], "preclean")
        self.assertFalse((self.base / "outputs" / "column_mapping.json").exists())

    def test_run_with_architect_needs_an_api_url(self):
        proc = run_cli("run", "--base-dir", str(self.base), "--skip-preclean")
        self.assertEqual(proc.returncode, 1)
        self.assertIn("Stage architect failed", proc.stderr)
        self.assertIn("api_base_url", proc.stderr)


class RunCommandTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.base = Path(self._tmp.name) / "run"
        shutil.copytree(DEMO_DIR, self.base)

    def tearDown(self):
        self._tmp.cleanup()

    def _main(self, *args: str) -> tuple[int, str]:
        stdout = io.StringIO()
        with contextlib.redirect_stdout(stdout), contextlib.redirect_stderr(io.StringIO()):
            code = main(list(args))
        return code, stdout.getvalue()

    def test_model_flags_route_to_each_stage(self):
        mapping = create_column_mapping(self.base / "outputs" / "architect_log.txt", self.base / "outputs" / "column_mapping.json")
        summary = {"processed": ["phone"], "already_valid": [], "catch_all": [], "excluded": [], "failed": []}
        with mock.patch("sheet_stitcher.cli._client_for") as client_for, \
                mock.patch("sheet_stitcher.cli.run_architect", return_value=mapping) as architect, \
                mock.patch("sheet_stitcher.cli.run_cleaner", return_value=summary) as cleaner:
            code, stdout = self._main(
                "run", "--base-dir", str(self.base), "--skip-preclean",
                "--model", "m-default", "--model-cleaner", "m-clean", "--instructions", "dates are ISO",
                "--json", "-q",
            )

        self.assertEqual(code, 0)
        client_for.assert_called_once()
        self.assertEqual(architect.call_args.kwargs, {"custom_instructions": "dates are ISO", "model": "m-default"})
        self.assertEqual(cleaner.call_args.kwargs, {"model": "m-clean"})
        payload = json.loads(stdout)
        self.assertEqual(payload["stages"]["preclean"]["status"], "skipped")
        self.assertEqual(payload["stages"]["cleaner"]["processed"], ["phone"])

    def test_failed_cleaner_columns_still_stitch_but_exit_1(self):
        mapping = create_column_mapping(self.base / "outputs" / "architect_log.txt", self.base / "outputs" / "column_mapping.json")
        summary = {"processed": [], "already_valid": [], "catch_all": [], "excluded": [], "failed": ["email"]}
        with mock.patch("sheet_stitcher.cli._client_for"), \
                mock.patch("sheet_stitcher.cli.run_architect", return_value=mapping), \
                mock.patch("sheet_stitcher.cli.run_cleaner", return_value=summary):
            code, stdout = self._main("run", "--base-dir", str(self.base), "--skip-preclean", "--json", "-q")

        self.assertEqual(code, 1)
        payload = json.loads(stdout)
        self.assertEqual(payload["stages"]["cleaner"]["status"], "partial")
        self.assertEqual(payload["stages"]["stitch"]["status"], "ok")
        self.assertTrue((self.base / "data" / "data_stitched.csv").exists())

    def test_service_error_in_architect_is_a_command_error(self):
        with mock.patch("sheet_stitcher.cli._client_for"), \
                mock.patch("sheet_stitcher.cli.run_architect", side_effect=requests.ConnectionError("refused")):
            code, stdout = self._main("run", "--base-dir", str(self.base), "--skip-preclean", "--json", "-q")

        self.assertEqual(code, 1)
        payload = json.loads(stdout)
        self.assertEqual(payload["failed_stage"], "architect")
        self.assertEqual(payload["stages"]["architect"], {"status": "failed", "error": "refused"})
        self.assertNotIn("cleaner", payload["stages"])


if __name__ == "__main__":
    unittest.main()
