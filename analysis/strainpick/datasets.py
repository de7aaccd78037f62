#!/usr/bin/env python3
"""Small literal tables of distinct ESBL E. coli STs observed per participant.

Each table is a handful of carriers (every participant has >= 1 ST), in the
shape the loader produces: participant, n_strains, study and, for the
longitudinal table, visit. They are illustrative inputs for the fitting and
simulation steps, not study results.
"""
from __future__ import annotations

from typing import Dict, List

import pandas as pd

from .io_utils import validate_counts

# study -> ST counts, one per participant
_SINGLE_VISIT: Dict[str, List[int]] = {
    "carriage_a": [1, 1, 2, 1, 1, 3, 1, 2],
    "carriage_b": [1, 2, 1, 1, 1, 1, 2, 1, 4, 1],
    "travellers": [2, 1, 3, 1, 2, 1, 1],
}

# participant -> ST counts at consecutive visits
_LONGITUDINAL: Dict[str, List[int]] = {
    "L01": [1, 1, 2],
    "L02": [2, 3, 2],
    "L03": [1, 1, 1],
    "L04": [3, 2, 4],
    "L05": [1, 2, 1],
    "L06": [1, 1, 1],
}


def single_visit(study: str) -> pd.DataFrame:
    if study not in _SINGLE_VISIT:
        raise ValueError(f"Unknown dataset: {study} (have {sorted(_SINGLE_VISIT)})")
    counts = _SINGLE_VISIT[study]
    df = pd.DataFrame({
        "participant": [f"{study}_{i + 1:02d}" for i in range(len(counts))],
        "n_strains": counts,
        "study": study,
    })
    return validate_counts(df)


def pooled_single_visit() -> pd.DataFrame:
    return pd.concat([single_visit(s) for s in _SINGLE_VISIT], ignore_index=True)


def longitudinal() -> pd.DataFrame:
    rows = []
    for pid, series in _LONGITUDINAL.items():
        for v, k in enumerate(series, start=1):
            rows.append({"participant": pid, "visit": v, "n_strains": k, "study": "longitudinal"})
    return validate_counts(pd.DataFrame(rows))


def available() -> List[str]:
    return sorted(_SINGLE_VISIT) + ["pooled", "longitudinal"]


def load(name: str) -> pd.DataFrame:
    if name == "pooled":
        return pooled_single_visit()
    if name == "longitudinal":
        return longitudinal()
    return single_visit(name)
