from __future__ import annotations

import argparse
import os
from typing import Optional, Sequence, Union

import numpy as np
import pandas as pd

from .core import (
    ConfigError,
    InputError,
    UnknownPathwayError,
    _read_delim,
    _safe_log,
    add_clustering,
    cluster_cells,
    embed_cells,
    load_singlecell,
    prepare,
)
from .databases import add_lr, load_lr_db, load_pathway_db, switch_db
from .dge import dge
from .network import intra_network
from .report import (
    make_network_pdf_report,
    write_clustering,
    write_dge_tables,
    write_interactions,
    write_network,
    write_prepared,
)
from .signaling import INT_TYPES, SPECIFIC_BY, cell_signaling


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        description="Infer ligand-receptor cell-cell communication and intracellular networks from scRNA-seq counts",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    src = ap.add_argument_group("Inputs")
    src.add_argument("--counts", help="Count matrix (genes x cells; CSV/TSV, first column = gene symbol)")
    src.add_argument("--sn_data", help="Single-cell input instead of --counts: .h5ad, 10x .h5, 10x mtx dir, or a glob")
    src.add_argument("--species", default="hsapiens", help="Species of the data (e.g. mmusculus); non-human symbols are mapped to human")
    src.add_argument("--ortholog_map", help="Two-column table (species symbol, human symbol) instead of querying g:Profiler")

    prep = ap.add_argument_group("Preparation")
    prep.add_argument("--normalize", choices=["quantile", "library", "none"], default="quantile", help="Normalization method")
    prep.add_argument("--lower", type=float, default=0.0, help="Fraction of least expressed genes to remove")
    prep.add_argument("--upper", type=float, default=0.0, help="Fraction of most expressed genes to remove")
    prep.add_argument("--most_variables", type=int, default=0, help="Keep a reduced matrix of the N most variable genes")

    cl = ap.add_argument_group("Clustering")
    cl.add_argument("--clusters", help="Cluster table (columns: cell, cluster) or a single column of ids in cell order")
    cl.add_argument("--cluster_names", help="Comma-separated cluster names, in cluster id order")
    cl.add_argument("--n_clusters", type=int, help="Cluster cells with k-means when --clusters is not given")
    cl.add_argument("--tsne", action="store_true", help="Also compute a t-SNE embedding (requires scanpy)")

    sig = ap.add_argument_group("Cell signaling")
    sig.add_argument("--int_type", choices=list(INT_TYPES), default="paracrine", help="Cluster pairs to score")
    sig.add_argument("--min_cell_fraction", type=float, default=0.1, help="Minimum fraction of cells expressing the ligand / receptor")
    sig.add_argument("--s_score", type=float, default=0.5, help="Minimum LR score")
    sig.add_argument("--specific_by", choices=list(SPECIFIC_BY), default="receptor", help="Gene used for the specificity flag")
    sig.add_argument("--lr_db", help="Replace the LR database (TSV/CSV with exactly: ligand, receptor)")
    sig.add_argument("--add_lr", help="Extra LR pairs to merge (two columns: ligand, receptor)")

    net = ap.add_argument_group("Intracellular network")
    net.add_argument("--goi", action="append", help="Gene(s) of interest, typically receptors; can be repeated")
    net.add_argument("--coi", help="Cluster of interest (cluster name)")
    net.add_argument("--pathway_db", help="Pathway database (columns: a_gene, b_gene, pathway, int_type)")
    net.add_argument("--pathway", action="append", help="Restrict to pathway name(s); can be repeated")
    net.add_argument("--cell_prop", type=float, default=0.2, help="Minimum fraction of coi cells expressing a gene")
    net.add_argument("--max_occurrence", type=int, default=500, help="Ignore pathways occurring more often in the database")
    net.add_argument("--connected", action="store_true", help="Keep only genes connected to the gene of interest")
    net.add_argument("--no_ligands", action="store_true", help="Do not graft upstream ligands onto the networks")
    net.add_argument("--dge_visible", action="store_true", help="Restrict network genes to the coi marker genes")

    de = ap.add_argument_group("Differential expression")
    de.add_argument("--dge", action="store_true", help="Compute marker genes per cluster")
    de.add_argument("--dge_pval", type=float, default=0.05, help="Adjusted p-value threshold for marker genes")

    out = ap.add_argument_group("Outputs")
    out.add_argument("--no_pdf", action="store_true", help="Do not produce the network PDF report")
    out.add_argument("--quiet", action="store_true", help="Only print warnings")
    out.add_argument("--output_dir", required=True, help="Directory to write outputs")
    return ap


def _read_cluster_ids(path: str) -> Union[pd.Series, np.ndarray]:
    """Series indexed by cell for a cell,cluster table; plain ids in cell order for a single column."""
    df = _read_delim(path)
    cols = {c.lower(): c for c in df.columns}
    if "cell" in cols and "cluster" in cols:
        return pd.Series(df[cols["cluster"]].to_numpy(), index=df[cols["cell"]].astype(str))
    if df.shape[1] == 1:
        return df.iloc[:, 0].to_numpy()
    raise InputError("--clusters must have columns cell,cluster or a single column of cluster ids")


def run(args: argparse.Namespace) -> None:
    verbose = not args.quiet
    os.makedirs(args.output_dir, exist_ok=True)

    source = load_singlecell(args.sn_data) if args.sn_data else args.counts
    expr = prepare(
        source,
        species=args.species,
        most_variables=args.most_variables,
        normalize=args.normalize,
        lower=args.lower,
        upper=args.upper,
        ortholog_map=args.ortholog_map,
        verbose=verbose,
    )
    write_prepared(expr, os.path.join(args.output_dir, "data"))

    names = [n.strip() for n in args.cluster_names.split(",")] if args.cluster_names else None
    if args.clusters:
        ids = _read_cluster_ids(args.clusters)
        clusters = add_clustering(expr, ids, names=names)
    else:
        ids = cluster_cells(expr, args.n_clusters, method="kmeans")
        clusters = add_clustering(expr, ids, names=names)
        embedding = embed_cells(expr) if args.tsne else None
        write_clustering(clusters.ids, os.path.join(args.output_dir, "cluster-analysis"), "kmeans", embedding)

    markers = None
    if args.dge:
        markers = dge(expr, clusters, pval_threshold=args.dge_pval, verbose=verbose)
        write_dge_tables(markers, os.path.join(args.output_dir, "cluster-analysis"))

    lrdb = switch_db(_read_delim(args.lr_db)) if args.lr_db else load_lr_db()
    if args.add_lr:
        lrdb = add_lr(lrdb, _read_delim(args.add_lr))
    table = cell_signaling(
        expr,
        clusters,
        lrdb,
        int_type=args.int_type,
        min_cell_fraction=args.min_cell_fraction,
        s_score=args.s_score,
        specific_by=args.specific_by,
        verbose=verbose,
    )
    paths = write_interactions(table, os.path.join(args.output_dir, "cell-signaling"), expr=expr)
    table.to_frame().to_csv(os.path.join(args.output_dir, "interactions.csv"), index=False)
    _safe_log(f"[ok] Wrote: {len(paths)} interaction tables ({int(table.n_interactions().sum())} interactions)")

    if args.goi:
        restrict = None
        if args.dge_visible:
            if markers is None:
                raise ConfigError("--dge_visible requires --dge")
            if args.coi not in markers:
                raise ConfigError(f"{args.coi} must be included in the cluster names")
            restrict = set(markers[args.coi]["gene"])
        networks = intra_network(
            expr,
            clusters,
            goi=args.goi,
            coi=args.coi,
            pathway_db=load_pathway_db(args.pathway_db),
            interactions=table,
            cell_prop=args.cell_prop,
            pathway=args.pathway,
            add_lig=not args.no_ligands,
            max_occurrence=args.max_occurrence,
            connected=args.connected,
            restrict_genes=restrict,
            verbose=verbose,
        )
        net_dir = os.path.join(args.output_dir, "networks")
        for net in networks.values():
            write_network(net, net_dir)
        if not args.no_pdf:
            pdf = make_network_pdf_report(networks, os.path.join(net_dir, "report_networks.pdf"))
            if pdf:
                _safe_log(f"[ok] Wrote: {pdf}")


def main(argv: Optional[Sequence[str]] = None) -> None:
    ap = build_parser()
    args = ap.parse_args(argv)

    if bool(args.counts) == bool(args.sn_data):
        raise SystemExit("Specify exactly one of --counts or --sn_data")
    if not args.clusters and not args.n_clusters:
        raise SystemExit("Provide --clusters or --n_clusters")
    if args.goi and not args.coi:
        raise SystemExit("--goi requires --coi")

    try:
        run(args)
    except (InputError, ConfigError, UnknownPathwayError) as e:
        raise SystemExit(str(e))


if __name__ == "__main__":
    main()
