import os
import tempfile
import unittest

import pandas as pd

from analysis.strainpick import datasets
from analysis.strainpick.io_utils import (
    canonicalize_columns,
    parse_csv_list,
    read_counts_table,
    read_table_any,
    toml_to_cli,
    validate_counts,
    write_tsv,
)

DATA_DIR = os.path.join(os.path.dirname(__file__), "..", "data")


class TestCountsLoading(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()

    def tearDown(self):
        self.tmp.cleanup()

    def test_read_shipped_counts_table(self):
        df = read_counts_table(os.path.join(DATA_DIR, "strain_counts.tsv"))
        self.assertEqual(list(df.columns[:2]), ["participant", "study"])
        self.assertTrue((df["n_strains"] >= 1).all())
        self.assertEqual(df["n_strains"].dtype.kind, "i")
        self.assertEqual(df["participant"].nunique(), 12)

    def test_header_synonyms_and_csv(self):
        path = os.path.join(self.tmp.name, "counts.csv")
        pd.DataFrame({"Subject ID": ["a", "b"], "Distinct STs": [1, 3]}).to_csv(path, index=False)
        df = read_counts_table(path)
        self.assertEqual(df["participant"].tolist(), ["a", "b"])
        self.assertEqual(df["n_strains"].tolist(), [1, 3])

    def test_missing_participant_ids_are_generated(self):
        path = os.path.join(self.tmp.name, "counts.tsv")
        pd.DataFrame({"n_strains": [1, 2, 1]}).to_csv(path, sep="\t", index=False)
        df = read_counts_table(path)
        self.assertEqual(df["participant"].tolist(), ["P001", "P002", "P003"])

    def test_env_override(self):
        path = os.path.join(self.tmp.name, "env.tsv")
        pd.DataFrame({"participant": ["x"], "n_strains": [2]}).to_csv(path, sep="\t", index=False)
        old = os.environ.get("STRAINPICK_COUNTS_TABLE")
        os.environ["STRAINPICK_COUNTS_TABLE"] = path
        try:
            df = read_counts_table()
        finally:
            if old is None:
                del os.environ["STRAINPICK_COUNTS_TABLE"]
            else:
                os.environ["STRAINPICK_COUNTS_TABLE"] = old
        self.assertEqual(df["n_strains"].tolist(), [2])

    def test_missing_and_unsupported_files(self):
        with self.assertRaises(FileNotFoundError):
            read_table_any(os.path.join(self.tmp.name, "nope.tsv"))
        path = os.path.join(self.tmp.name, "counts.json")
        with open(path, "w") as f:
            f.write("{}")
        with self.assertRaises(ValueError):
            read_table_any(path)

    def test_write_tsv_creates_parent(self):
        out = write_tsv(pd.DataFrame({"a": [1]}), os.path.join(self.tmp.name, "sub", "x.tsv"))
        self.assertTrue(os.path.exists(out))
        self.assertEqual(pd.read_csv(out, sep="\t")["a"].tolist(), [1])


class TestValidation(unittest.TestCase):
    def test_negative_and_fractional_counts_rejected(self):
        for bad in ([1, -1], [1, 1.5], [1, "two"]):
            df = pd.DataFrame({"participant": ["a", "b"], "n_strains": bad})
            with self.assertRaises(ValueError) as ctx:
                validate_counts(df)
            self.assertIn("b", str(ctx.exception))

    def test_missing_counts_dropped(self):
        df = pd.DataFrame({"participant": ["a", "b", "c"], "n_strains": [1, None, 2]})
        with self.assertLogs("strainpick", level="WARNING"):
            out = validate_counts(df)
        self.assertEqual(out["participant"].tolist(), ["a", "c"])
        self.assertEqual(out["n_strains"].tolist(), [1, 2])

    def test_missing_column(self):
        with self.assertRaises(ValueError):
            validate_counts(pd.DataFrame({"participant": ["a"]}))

    def test_canonicalize_keeps_existing(self):
        df = canonicalize_columns(pd.DataFrame({"n_strains": [1], "count": [5], "ID": ["a"]}))
        self.assertEqual(df["n_strains"].tolist(), [1])
        self.assertIn("participant", df.columns)


class TestDatasets(unittest.TestCase):
    def test_single_visit_tables(self):
        df = datasets.single_visit("carriage_a")
        self.assertEqual(len(df), 8)
        self.assertTrue((df["n_strains"] >= 1).all())
        self.assertEqual(df["participant"].iloc[0], "carriage_a_01")

    def test_pooled_and_longitudinal(self):
        pooled = datasets.load("pooled")
        self.assertEqual(len(pooled), 25)
        self.assertEqual(set(pooled["study"]), {"carriage_a", "carriage_b", "travellers"})
        lon = datasets.load("longitudinal")
        self.assertEqual(lon.groupby("participant").size().max(), 3)
        self.assertEqual(set(lon["visit"]), {1, 2, 3})

    def test_unknown_dataset(self):
        with self.assertRaises(ValueError):
            datasets.load("nope")


class TestConfigHelpers(unittest.TestCase):
    def test_parse_csv_list(self):
        self.assertEqual(parse_csv_list("1, 2,5"), [1.0, 2.0, 5.0])
        self.assertIsNone(parse_csv_list(""))
        self.assertIsNone(parse_csv_list(None))

    def test_toml_to_cli(self):
        cfg = {"zero_truncated": True, "no_plots": False, "picks_grid": [1, 2, 5], "n_sim": 500}
        cli = toml_to_cli(cfg, flag_keys={"zero_truncated", "no_plots"}, listy={"picks_grid"})
        self.assertEqual(cli, ["--zero-truncated", "--picks-grid", "1,2,5", "--n-sim", "500"])


if __name__ == "__main__":
    unittest.main()
