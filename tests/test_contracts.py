from __future__ import annotations

import unittest
from pathlib import Path

import pandas as pd

from sheet_stitcher.contracts import CONTRACT_VERSIONS, build_run_summary, utc_now_iso, wrap_payload
from sheet_stitcher.mapping import ColumnMapping, ColumnSpec
from sheet_stitcher.stitcher import build_ledger_payload, build_validation_payload, stitch


class ContractTests(unittest.TestCase):
    def setUp(self):
        mapping = ColumnMapping([ColumnSpec("n", "number", 1, regex=r"^\d+$")])
        self.result = stitch(pd.DataFrame({"n": ["1", "x"]}), mapping)
        self.run_summary = build_run_summary(
            stage="stitch",
            input_path=Path("data/data_cleaned.csv"),
            output_path=Path("data/data_stitched.csv"),
            metrics=self.result.metrics(),
            warnings=["one"],
        )

    def test_run_summary_shape(self):
        self.assertEqual(self.run_summary["tool"], "sheet-stitcher")
        self.assertEqual(self.run_summary["status"], "ok")
        self.assertEqual(self.run_summary["warnings_count"], 1)
        self.assertEqual(self.run_summary["output_file"], str(Path("data/data_stitched.csv")))
        self.assertTrue(self.run_summary["generated_at"].endswith("Z"))

    def test_ledger_payload_emits_versioned_contract(self):
        payload = build_ledger_payload(self.result, self.run_summary)
        self.assertEqual(payload["contract"]["name"], "stitcher.change_ledger")
        self.assertEqual(payload["schema_version"], CONTRACT_VERSIONS["stitcher.change_ledger"])
        self.assertEqual(
            set(payload["changes"][0]),
            {
                "rowId", "columnName", "columnHeader", "columnIndex", "source", "currentValue",
                "correctedValue", "needsChange", "isFlagged", "flagReason", "unableToFix", "cleanerNote",
            },
        )

    def test_validation_payload_holds_pre_post_and_delta(self):
        payload = build_validation_payload(self.result, self.run_summary)
        self.assertEqual(payload["contract"]["name"], "stitcher.validation_summary")
        self.assertEqual(payload["pre_validation"]["number"]["invalid_count"], 1)
        self.assertEqual(payload["validation_delta"], {"number": 0.0})
        self.assertEqual(payload["run_summary"]["metrics"]["flagged_cells"], 1)

    def test_wrap_payload_rejects_unknown_contract(self):
        with self.assertRaises(KeyError):
            wrap_payload("stitcher.nope", {}, self.run_summary)

    def test_utc_now_iso_is_second_precision_utc(self):
        self.assertRegex(utc_now_iso(), r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z$")


if __name__ == "__main__":
    unittest.main()
