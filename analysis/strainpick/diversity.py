#!/usr/bin/env python3
"""
Colony-level ST tables -> per-participant strain counts and richness diagnostics.

Input: one row per sequenced colony with
  participant, colony, st
and optionally
  visit
Colonies without an ST call are dropped with a warning.
"""
from __future__ import annotations

import logging
from typing import Sequence

import numpy as np
import pandas as pd

from .io_utils import COUNT_COL, GROUP_COL, LOGGER_NAME, norm, read_table_any, validate_counts

try:
    from skbio.diversity import alpha_diversity
except Exception as e:
    raise SystemExit("This module requires scikit-bio. Install with: pip install scikit-bio") from e

DEFAULT_METRICS = ("observed_features", "chao1", "goods_coverage")

COLONY_CAND = {
    "participant": ["participant", "participant_id", "subject", "subject_id", "sample", "sample_id"],
    "colony": ["colony", "colony_id", "isolate", "isolate_id", "pick"],
    "st": ["st", "sequence_type", "mlst", "mlst_st", "strain"],
    "visit": ["visit", "timepoint", "time", "date", "week"],
}

logger = logging.getLogger(LOGGER_NAME)


def read_colony_table(path: str) -> pd.DataFrame:
    df = read_table_any(path)
    hmap = {norm(c): c for c in df.columns}
    rename = {}
    for key, opts in COLONY_CAND.items():
        if key in df.columns:
            continue
        for cand in opts:
            if cand in hmap and hmap[cand] not in rename:
                rename[hmap[cand]] = key
                break
    df = df.rename(columns=rename)
    for col in ("participant", "st"):
        if col not in df.columns:
            raise ValueError(f"Colony table missing column: {col} (have {list(df.columns)})")
    if "colony" not in df.columns:
        df["colony"] = df.groupby("participant").cumcount() + 1
    raw = df["st"]
    if pd.api.types.is_float_dtype(raw):
        # numeric STs read as float when some are missing
        raw = raw.astype("Int64")
    st = raw.astype(str).str.strip()
    untyped = raw.isna() | st.str.lower().isin(["", "nan", "na", "<na>", "unknown", "-"])
    if untyped.any():
        logger.warning("Dropping %d colonies without an ST call", int(untyped.sum()))
    df = df.loc[~untyped].copy()
    df["st"] = st.loc[df.index]
    df["participant"] = df["participant"].astype(str)
    return df.reset_index(drop=True)


def strain_counts_from_colonies(df: pd.DataFrame) -> pd.DataFrame:
    """Distinct STs per participant (per visit when the table has visits)."""
    keys = [GROUP_COL, "visit"] if "visit" in df.columns else [GROUP_COL]
    out = (df.groupby(keys, sort=True)
             .agg(**{COUNT_COL: ("st", "nunique"), "n_colonies": ("colony", "size")})
             .reset_index())
    return validate_counts(out)


def colony_matrix(df: pd.DataFrame) -> pd.DataFrame:
    """participant x ST colony counts."""
    return pd.crosstab(df[GROUP_COL], df["st"])


def colony_alpha(df: pd.DataFrame, metrics: Sequence[str] = DEFAULT_METRICS) -> pd.DataFrame:
    mat = colony_matrix(df)
    counts = mat.values.astype(np.int64)
    ids = mat.index.astype(str)
    out = {}
    for m in metrics:
        out[m] = alpha_diversity(m, counts, ids=ids)
    res = pd.DataFrame(out)
    res.index.name = GROUP_COL
    res["n_colonies"] = counts.sum(axis=1)
    return res.reset_index()
