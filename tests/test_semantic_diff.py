from __future__ import annotations

import unittest

from sheet_stitcher.semantic_diff import (
    CellCorrection,
    cleaner_output_filename,
    column_name_from_filename,
    extract_column_schema,
    extract_scoped_semantic_diff,
    parse_cell_corrections,
    parse_row_corrections,
    safe_column_filename,
)

SCHEMA_BLOCK = """data_title,data_type,data_description,data_example,data_regex
name,string,Person name,Alice,^.*$
phone,string,"US phone, E.164",+15551234567,^\\+1\\d{10}$
```EXCLUDE```notes,string,Free text,n/a,^.*$"""


class RowModeTests(unittest.TestCase):
    def test_row_lines_parse_with_quote_aware_fields(self):
        parsed = parse_row_corrections('1,Alice,"Smith, ""Jr""",555\n2,Bob,Jones,556')
        self.assertEqual(len(parsed), 2)
        first = parsed.corrections[0]
        self.assertEqual(first.row_id, 1)
        self.assertEqual(first.values, ("Alice", 'Smith, "Jr"', "555"))

    def test_sentinels_and_blank_lines_are_skipped_silently(self):
        block = "1,a\n\n… Existing Data …\n... Existing Data ...\n4,d"
        parsed = parse_row_corrections(block)
        self.assertEqual([c.row_id for c in parsed.corrections], [1, 4])
        self.assertEqual(parsed.sentinel_lines, 2)
        self.assertEqual(parsed.skipped, [])

    def test_unparsable_lines_are_recorded_and_do_not_abort(self):
        block = "ID,name,phone\n1,a,b\nthe AI chatted here\n2,c,d"
        with self.assertLogs("sheet_stitcher.semantic_diff", level="WARNING"):
            parsed = parse_row_corrections(block)
        self.assertEqual([c.row_id for c in parsed.corrections], [1, 2])
        self.assertEqual([skip.line_number for skip in parsed.skipped], [1, 3])

    def test_flagged_marker_is_stripped_and_row_recorded(self):
        parsed = parse_row_corrections("```FLAGGED ambiguous date```7,2024-01-02,x")
        self.assertEqual(parsed.corrections[0].row_id, 7)
        self.assertEqual(parsed.corrections[0].values, ("2024-01-02", "x"))
        self.assertEqual(parsed.flag_notes, {7: "ambiguous date"})

    def test_last_write_wins_per_row_id(self):
        parsed = parse_row_corrections("3,first\n5,other\n3,second")
        by_row = {c.row_id: c.values for c in parsed.corrections}
        self.assertEqual(by_row[3], ("second",))
        self.assertEqual([c.row_id for c in parsed.corrections], [3, 5])

    def test_none_block_yields_nothing(self):
        self.assertEqual(len(parse_row_corrections(None)), 0)

    def test_vertical_tab_inside_a_value_does_not_split_the_row(self):
        parsed = parse_row_corrections("1,Alice\x0bSmith,+15551234567\n2,Bob Jones,+15550000000\r\n")
        self.assertEqual(parsed.skipped, [])
        self.assertEqual(parsed.corrections[0].values, ("Alice\x0bSmith", "+15551234567"))
        self.assertEqual(parsed.corrections[1].values, ("Bob Jones", "+15550000000"))

    def test_very_long_field_does_not_abort_the_batch(self):
        parsed = parse_row_corrections("1," + "a" * 200000 + "\n2,ok")
        self.assertEqual([c.row_id for c in parsed.corrections], [1, 2])
        self.assertEqual(len(parsed.corrections[0].values[0]), 200000)
        self.assertEqual(parsed.corrections[1].values, ("ok",))

    def test_flag_note_is_captured_and_follows_last_write(self):
        parsed = parse_row_corrections("```FLAGGED  bad date ```1,x\n```FLAGGED```2,y\n```FLAGGED gone```3,z\n3,z2")
        self.assertEqual(parsed.flag_notes, {1: "bad date", 2: ""})


class ScopedModeTests(unittest.TestCase):
    def test_value_is_everything_after_first_comma(self):
        parsed = parse_cell_corrections("1,+15551234567\n2,12 Main St, Apt 4", "phone")
        self.assertEqual(
            parsed.corrections,
            [
                CellCorrection(1, "phone", "+15551234567"),
                CellCorrection(2, "phone", "12 Main St, Apt 4"),
            ],
        )

    def test_surrounding_quotes_are_stripped_once(self):
        parsed = parse_cell_corrections('1,"Smith, ""Jr"""\n2,"plain"', "name")
        self.assertEqual(parsed.corrections[0].value, 'Smith, "Jr"')
        self.assertEqual(parsed.corrections[1].value, "plain")

    def test_scoped_last_write_wins(self):
        parsed = parse_cell_corrections("1,a\n1,b", "col")
        self.assertEqual(parsed.corrections, [CellCorrection(1, "col", "b")])

    def test_empty_value_is_kept(self):
        parsed = parse_cell_corrections("4,", "col")
        self.assertEqual(parsed.corrections, [CellCorrection(4, "col", "")])

    def test_form_feed_inside_value_stays_in_the_cell(self):
        parsed = parse_cell_corrections("1,page\x0cbreak\n2,ok", "notes")
        self.assertEqual(
            parsed.corrections,
            [CellCorrection(1, "notes", "page\x0cbreak"), CellCorrection(2, "notes", "ok")],
        )

    def test_scoped_diff_keeps_rows_after_a_long_quoted_field(self):
        block = '1,"' + "b" * 200000 + '",555\n2,Bob,556'
        scoped = extract_scoped_semantic_diff(block, "phone", 2)
        self.assertEqual(scoped.split("\n"), ["ID,phone", "1,555", "2,556"])


class FilenameTests(unittest.TestCase):
    def test_column_name_from_plain_and_batch_filenames(self):
        self.assertEqual(column_name_from_filename("phone_output.txt"), "phone")
        self.assertEqual(column_name_from_filename("phone_batch_2_output.txt"), "phone")
        self.assertEqual(column_name_from_filename("home_phone_output.txt"), "home_phone")

    def test_safe_filename_and_output_names(self):
        self.assertEqual(safe_column_filename("Phone Number (Home)"), "Phone_Number_Home")
        self.assertEqual(cleaner_output_filename("phone"), "phone_output.txt")
        self.assertEqual(cleaner_output_filename("phone", 2, 3), "phone_batch_2_output.txt")


class CleanerInputTests(unittest.TestCase):
    def test_column_schema_is_header_plus_one_line(self):
        schema = extract_column_schema(SCHEMA_BLOCK, "phone")
        lines = schema.splitlines()
        self.assertEqual(len(lines), 2)
        self.assertTrue(lines[1].startswith("phone,string"))

    def test_column_schema_matches_marked_line(self):
        schema = extract_column_schema(SCHEMA_BLOCK, "notes")
        self.assertTrue(schema.splitlines()[1].startswith("notes,string"))

    def test_unknown_column_falls_back_to_full_schema(self):
        self.assertEqual(extract_column_schema(SCHEMA_BLOCK, "fax"), SCHEMA_BLOCK)

    def test_scoped_diff_picks_column_by_mapping_index(self):
        block = "1,Alice,555\n... Existing Data ...\n3,Carol,556\n4,Dan"
        scoped = extract_scoped_semantic_diff(block, "phone", 2)
        self.assertEqual(scoped.splitlines(), ["ID,phone", "1,555", "3,556"])


if __name__ == "__main__":
    unittest.main()
