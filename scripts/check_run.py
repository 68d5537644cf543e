#!/usr/bin/env python3
from __future__ import annotations

import argparse
import glob
import os
import sys

import pandas as pd


def main() -> int:
    ap = argparse.ArgumentParser()
    ap.add_argument("--out", required=True, help="Output directory from a signal-builder run")
    args = ap.parse_args()
    out = args.out
    long_path = os.path.join(out, "interactions.csv")
    if not os.path.exists(long_path):
        print(f"[error] missing {long_path}", file=sys.stderr)
        return 2
    df = pd.read_csv(long_path)
    print(f"[ok] Interactions: {len(df)} rows, {df[['sender', 'receiver']].drop_duplicates().shape[0]} cluster pairs")
    if not df.empty:
        counts = df.pivot_table(index="sender", columns="receiver", values="score", aggfunc="count", fill_value=0)
        print("\nInteractions per sender x receiver:")
        print(counts)
        print("\nTop pairs by score:")
        print(df.sort_values("score", ascending=False).head(10))
    markers = sorted(glob.glob(os.path.join(out, "cluster-analysis", "table_dge_*.txt")))
    if markers:
        print(f"\nMarker tables: {len(markers)}")
    nets = sorted(glob.glob(os.path.join(out, "networks", "intracell_network_*.graphml")))
    for p in nets:
        print(f"\nNetwork: {os.path.basename(p)}")
        pw = p.replace("intracell_network_", "intracell_network_pathway_analysis_").replace(".graphml", ".txt")
        if os.path.exists(pw):
            print(pd.read_csv(pw, sep="\t").head(10))
    pdf = os.path.join(out, "networks", "report_networks.pdf")
    if os.path.exists(pdf):
        print("PDF report found.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
