#!/usr/bin/env python3
"""io_utils.py

Shared loading/writing helpers for the strain-sampling analyses.

Expected input: a flat table of observation records with at least
  participant, n_strains
and optionally
  study, visit

By default, `read_counts_table()` reads:
  data/strain_counts.tsv

You can override with env var:
  STRAINPICK_COUNTS_TABLE=/path/to/file.tsv
"""
from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import numpy as np
import pandas as pd

try:
    import tomllib as _toml  # py311+
except ModuleNotFoundError:
    try:
        import tomli as _toml  # type: ignore[import-not-found]  # py<311
    except ModuleNotFoundError:
        _toml = None

DEFAULT_COUNTS = "data/strain_counts.tsv"
LOGGER_NAME = "strainpick"

COUNT_COL = "n_strains"
GROUP_COL = "participant"

# canonical name -> accepted header spellings (lowercased, non-alnum -> "_")
CAND = {
    "participant": ["participant", "participant_id", "subject", "subject_id", "id", "sample", "sample_id", "sampleid"],
    "n_strains": ["n_strains", "strains", "n_st", "n_sts", "st_count", "count", "distinct_sts", "n"],
    "study": ["study", "source", "cohort", "dataset"],
    "visit": ["visit", "timepoint", "time", "date", "week"],
}


def setup_logging(level: str = "INFO") -> logging.Logger:
    lvl = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=lvl, format="%(asctime)s %(levelname)s %(message)s", datefmt="%H:%M:%S")
    return logging.getLogger(LOGGER_NAME)


def ensure_dir(path: str) -> None:
    os.makedirs(path, exist_ok=True)


def parse_csv_list(s: Optional[str]) -> Optional[List[float]]:
    if not s:
        return None
    out = []
    for part in str(s).split(","):
        part = part.strip()
        if part:
            out.append(float(part))
    return out or None


def norm(s: str) -> str:
    return re.sub(r'[^a-z0-9]+', '_', str(s).strip().lower()).strip("_")


def read_table_any(path: str) -> pd.DataFrame:
    if not os.path.exists(path):
        raise FileNotFoundError(str(path))
    if path.lower().endswith((".tsv", ".txt")):
        return pd.read_csv(path, sep="\t")
    if path.lower().endswith(".csv"):
        return pd.read_csv(path)
    if path.lower().endswith((".xlsx", ".xls")):
        try:
            return pd.read_excel(path)
        except ImportError as e:
            raise RuntimeError(f"Reading Excel requires openpyxl/xlrd: {e}")
    raise ValueError(f"Unsupported file type: {path}")


def write_tsv(df: pd.DataFrame, path: str) -> str:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(p, sep="\t", index=False, na_rep="")
    return str(p)


def canonicalize_columns(df: pd.DataFrame) -> pd.DataFrame:
    """Map likely headers to participant/n_strains/study/visit."""
    hmap = {norm(c): c for c in df.columns}
    rename = {}
    for key, opts in CAND.items():
        if key in df.columns:
            continue
        for cand in opts:
            if cand in hmap and hmap[cand] not in rename:
                rename[hmap[cand]] = key
                break
    return df.rename(columns=rename)


def validate_counts(df: pd.DataFrame, count_col: str = COUNT_COL, group_col: Optional[str] = GROUP_COL) -> pd.DataFrame:
    """Coerce the count column to int; counts must be non-negative integers."""
    logger = logging.getLogger(LOGGER_NAME)
    for col in [count_col] + ([group_col] if group_col else []):
        if col not in df.columns:
            raise ValueError(f"Missing column in counts table: {col} (have {list(df.columns)})")
    out = df.copy()
    vals = pd.to_numeric(out[count_col], errors="coerce")
    missing = vals.isna() & out[count_col].isna()
    if missing.any():
        logger.warning("Dropping %d row(s) with no %s value", int(missing.sum()), count_col)
        out = out.loc[~missing].copy()
        vals = vals.loc[~missing]
    bad = vals.isna() | (vals < 0) | (np.floor(vals) != vals)
    if bad.any():
        rows = out.loc[bad, [c for c in (group_col, count_col) if c]].to_dict("records")
        raise ValueError(f"{count_col} must be non-negative integers; offending rows: {rows}")
    out[count_col] = vals.astype(int)
    if group_col:
        out[group_col] = out[group_col].astype(str)
    return out.reset_index(drop=True)


def read_counts_table(path: Optional[str] = None, count_col: str = COUNT_COL, group_col: str = GROUP_COL) -> pd.DataFrame:
    counts_path = path or os.environ.get("STRAINPICK_COUNTS_TABLE") or DEFAULT_COUNTS
    df = canonicalize_columns(read_table_any(counts_path))
    if group_col not in df.columns:
        # one row per participant without ids
        df[group_col] = [f"P{i + 1:03d}" for i in range(len(df))]
    return validate_counts(df, count_col, group_col)


def load_toml(path: str) -> Dict[str, Any]:
    if _toml is None:
        raise RuntimeError("TOML configs need Python 3.11+ (tomllib) or `pip install tomli` on older Pythons.")
    with open(path, "rb") as f:
        return _toml.load(f)


def toml_to_cli(cfg: Dict[str, Any], flag_keys: Iterable[str] = (), listy: Iterable[str] = ()) -> List[str]:
    """Convert TOML keys to long options so argparse still does type/choice handling."""
    flag_keys = set(flag_keys)
    listy = set(listy)
    cli: List[str] = []
    for k, v in cfg.items():
        key = f"--{k.replace('_', '-')}"
        if k in flag_keys:
            if bool(v):  # only include when True
                cli.append(key)
        else:
            if isinstance(v, list) and k in listy:
                v = ",".join(str(x) for x in v)
            cli.extend([key, str(v)])
    return cli
