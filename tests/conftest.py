from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from signal_builder.core import add_clustering, prepare
from signal_builder.databases import PathwayDatabase, switch_db

PATHWAY_GENES = ["EGFR", "GRB2", "SOS1", "HRAS", "RAF1", "ZZZ", "YYY", "ISO1", "ISO2", "LONELY"]


def counts_table(values: dict, cells) -> pd.DataFrame:
    """Gene column + one column per cell, genes in insertion order."""
    df = pd.DataFrame(values, index=cells).T
    df.insert(0, "gene", list(values))
    return df.reset_index(drop=True)


@pytest.fixture
def signaling_data():
    # 3 clusters x 4 cells, values used as given (normalize="none")
    cells = [f"c{i}" for i in range(12)]
    c1, c2, c3 = [5, 5, 5, 5], [0, 0, 0, 0], [0, 0, 0, 0]
    values = {
        "EGF": c1 + c2 + c3,
        "EGFR": [0, 0, 0, 0] + [5, 5, 5, 5] + [4, 0, 0, 0],
        "TGFB1": [2] * 12,
        "TGFBR2": [2] * 12,
    }
    for i in range(10):
        values[f"BG{i}"] = [0.1] * 12
    expr = prepare(counts_table(values, cells), normalize="none", verbose=False)
    clusters = add_clustering(expr, [1] * 4 + [2] * 4 + [3] * 4, names=["A", "B", "C"])
    lrdb = switch_db(
        pd.DataFrame({"ligand": ["EGF", "TGFB1", "MISSING"], "receptor": ["EGFR", "TGFBR2", "EGFR"]})
    )
    return expr, clusters, lrdb


def pathway_table() -> pd.DataFrame:
    rows = [
        ("EGFR", "GRB2", "P1;P2", "in-complex-with"),
        ("GRB2", "SOS1", "P1", "in-complex-with"),
        ("GRB2", "SOS1", "P3", "controls-state-change-of"),
        ("SOS1", "HRAS", "P1", "controls-state-change-of"),
        ("RAF1", "MAP2K1", "P1", "controls-phosphorylation-of"),
        ("ZZZ", "YYY", "P4", "in-complex-with"),
        ("HRAS", "RAF1", "P1", "controls-state-change-of"),
        ("ISO1", "ISO2", "P1", "in-complex-with"),
    ]
    rows += [(f"F{i}A", f"F{i}B", "Filler", "in-complex-with") for i in range(40)]
    return pd.DataFrame(rows, columns=["a_gene", "b_gene", "pathway", "int_type"])


@pytest.fixture
def pathway_db():
    return PathwayDatabase(pathway_table())


@pytest.fixture
def network_data():
    # cluster c1 expresses the pathway genes, cluster c2 the ligand
    cells = [f"cell{i}" for i in range(8)]
    values = {g: [2] * 4 + [0] * 4 for g in PATHWAY_GENES}
    values["EGFR"] = [3] * 4 + [0] * 4
    values["EGF"] = [0] * 4 + [3] * 4
    expr = prepare(counts_table(values, cells), normalize="none", verbose=False)
    clusters = add_clustering(expr, [1] * 4 + [2] * 4, names=["c1", "c2"])
    lrdb = switch_db(pd.DataFrame({"ligand": ["EGF"], "receptor": ["EGFR"]}))
    return expr, clusters, lrdb


@pytest.fixture
def random_counts():
    rng = np.random.default_rng(0)
    X = rng.poisson(3.0, size=(50, 20)).astype(float)
    df = pd.DataFrame(X, columns=[f"cell{i}" for i in range(20)])
    df.insert(0, "gene", [f"gene {i}" for i in range(1, 51)])
    return df
