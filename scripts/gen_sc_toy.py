#!/usr/bin/env python3
from __future__ import annotations

import os

import numpy as np
import pandas as pd
import anndata as ad


def main() -> None:
    # sender cells express the ligands, receiver cells the receptors and their MAPK cascade
    sender = ["EGF", "TGFB1"]
    receiver = ["EGFR", "TGFBR2", "GRB2", "SOS1", "HRAS", "RAF1", "MAP2K1", "MAPK1"]
    background = ["GAPDH", "ACTB", "GENEX", "GENEY"]
    genes = sender + receiver + background
    n = 40
    rng = np.random.default_rng(0)
    X = rng.poisson(lam=0.3, size=(n, len(genes)))
    X[:20, : len(sender)] += rng.poisson(lam=8, size=(20, len(sender)))
    X[20:, len(sender) : len(sender) + len(receiver)] += rng.poisson(lam=8, size=(20, len(receiver)))
    X[:, -len(background) :] += rng.poisson(lam=5, size=(n, len(background)))
    obs = pd.DataFrame(index=pd.Index([f"cell{i}" for i in range(n)]))
    var = pd.DataFrame(index=pd.Index(genes, name=None))
    adata = ad.AnnData(X=X.astype(np.float32), obs=obs, var=var)

    os.makedirs("data/sc_toy", exist_ok=True)
    out = "data/sc_toy/sc.h5ad"
    adata.write(out)
    clusters = pd.DataFrame({"cell": obs.index, "cluster": [1] * 20 + [2] * 20})
    clusters.to_csv("data/sc_toy/clusters.csv", index=False)
    print(f"wrote {out} and data/sc_toy/clusters.csv (cluster 1 = senders, cluster 2 = receivers)")


if __name__ == "__main__":
    main()
