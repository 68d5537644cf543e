from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional, Sequence, Tuple, Union

import networkx as nx
import numpy as np
import pandas as pd

from .core import ClusterAssignment, ExpressionMatrix, _safe_log, genes_in
from .databases import ADDED_TAG, PathwayDatabase, simplify_interactions
from .signaling import InteractionTable

STATUS_GOI = "gene.of.interest"
STATUS_PATHWAY = "pw.related"
STATUS_LIGAND = "ligand"
EDGE_COLUMNS = ["a_gene", "b_gene", "cluster", "location", "int_type", "pathway", "weight"]
ENRICHMENT_COLUMNS = ["pathway", "hits", "pathway_size", "pval", "qval"]


@dataclass(frozen=True)
class IntracellularNetwork:
    """Connectivity downstream of one receptor in one cluster, with its pathway enrichment."""

    receptor: str
    coi: str
    graph: nx.DiGraph = field(default_factory=nx.DiGraph)
    edges: pd.DataFrame = field(default_factory=lambda: pd.DataFrame(columns=EDGE_COLUMNS))
    enrichment: pd.DataFrame = field(default_factory=lambda: pd.DataFrame(columns=ENRICHMENT_COLUMNS))

    @property
    def is_empty(self) -> bool:
        return self.graph.number_of_edges() == 0

    @property
    def intra_edges(self) -> pd.DataFrame:
        return self.edges[self.edges["location"] == "intra"]


def pathway_enrichment(
    net_edges: pd.DataFrame,
    db: PathwayDatabase,
    max_occurrence: int = 500,
    alpha: float = 0.05,
) -> pd.DataFrame:
    """One-sided hypergeometric test for each pathway tagged on ``net_edges``.

    N is the number of database edges, K the occurrence of the pathway in the
    database, n the number of network edges and k the network edges tagged with
    the pathway. Benjamini-Hochberg adjusted values below ``alpha`` are kept,
    sorted by increasing number of hits.
    """
    from scipy.stats import hypergeom
    from statsmodels.stats.multitest import multipletests

    tags = net_edges["pathway"].map(lambda s: [t for t in str(s).split(";") if t and t != ADDED_TAG])
    hits = tags.explode().dropna().value_counts()
    occ = db.occurrences()
    N = len(db)
    n = len(net_edges)
    rows = []
    for pw, k in hits.items():
        K = int(occ.get(pw, 0))
        if K == 0 or K > max_occurrence:
            continue
        pval = float(hypergeom.sf(int(k) - 1, N, K, n))
        rows.append(dict(pathway=pw, hits=int(k), pathway_size=K, pval=pval))
    out = pd.DataFrame(rows, columns=["pathway", "hits", "pathway_size", "pval"])
    if out.empty:
        out["qval"] = []
        return out[ENRICHMENT_COLUMNS]
    out["qval"] = multipletests(out["pval"].to_numpy(), method="fdr_bh")[1]
    out = out[out["qval"] < alpha]
    return out.sort_values("hits", ascending=True, kind="mergesort").reset_index(drop=True)[ENRICHMENT_COLUMNS]


def _db_in_matrix_symbols(db: PathwayDatabase, gmap: Dict[str, str]) -> pd.DataFrame:
    df = db.table.copy()
    df["a_gene"] = df["a_gene"].map(lambda g: gmap.get(g, g))
    df["b_gene"] = df["b_gene"].map(lambda g: gmap.get(g, g))
    return df


def _ligand_edges(receptor: str, coi: str, interactions: InteractionTable) -> pd.DataFrame:
    # weight is the ligand mean in the sender cluster, as scored
    rows = []
    for sender, tab in interactions.senders_to(coi):
        sub = tab[tab["receptor"] == receptor]
        if sub.empty:
            continue
        for lig, w in zip(sub["ligand"], sub["ligand_mean"]):
            rows.append(
                dict(
                    a_gene=f"{sender}-{lig}",
                    b_gene=receptor,
                    cluster=sender,
                    location="extra",
                    int_type="control",
                    pathway=ADDED_TAG,
                    weight=float(w),
                )
            )
    return pd.DataFrame(rows, columns=EDGE_COLUMNS)


def _node_label(node: str, sender: Optional[str], expr: ExpressionMatrix) -> str:
    # grafted ligand nodes are named "<sender>-<ligand>"
    if sender is not None:
        return f"{sender}-{expr.species_label(node[len(sender) + 1:])}"
    return expr.species_label(node)


def _build_graph(
    edges: pd.DataFrame,
    receptor: str,
    expr: ExpressionMatrix,
    coi_data: pd.DataFrame,
    connected: bool,
) -> Tuple[nx.DiGraph, pd.DataFrame]:
    extra = edges[edges["location"] == "extra"]
    ligands = dict(zip(extra["a_gene"], extra["cluster"]))
    lig_weight = dict(zip(extra["a_gene"], extra["weight"]))
    und = nx.Graph()
    und.add_edges_from(zip(edges["a_gene"], edges["b_gene"]))
    dist = nx.single_source_shortest_path_length(und, receptor) if receptor in und else {receptor: 0}
    unreachable = [v for v in und.nodes if v not in dist]
    if unreachable and connected:
        drop = set(unreachable)
        edges = edges[~edges["a_gene"].isin(drop) & ~edges["b_gene"].isin(drop)].reset_index(drop=True)

    g = nx.DiGraph()
    for a, b in zip(edges["a_gene"], edges["b_gene"]):
        for v in (a, b):
            if v in g:
                continue
            if v == receptor:
                status = STATUS_GOI
            elif v in ligands:
                status = STATUS_LIGAND
            else:
                status = STATUS_PATHWAY
            if status == STATUS_LIGAND:
                e = float(lig_weight[v])
            else:
                e = float(coi_data.loc[v].mean()) if v in coi_data.index else 0.0
            g.add_node(
                v,
                status=status,
                label=_node_label(v, ligands.get(v) if status == STATUS_LIGAND else None, expr),
                distance=int(dist.get(v, 1)),
                expression=0.0 if np.isnan(e) else e,
            )
    for row in edges.itertuples(index=False):
        attrs = dict(int_type=str(row.int_type), location=row.location, pathway=str(row.pathway), cluster=row.cluster)
        if row.location == "extra" and not pd.isna(row.weight):
            attrs["weight"] = float(row.weight)
        g.add_edge(row.a_gene, row.b_gene, **attrs)
    return g, edges


def intra_network(
    expr: ExpressionMatrix,
    clusters: ClusterAssignment,
    goi: Union[str, Sequence[str]],
    coi: str,
    pathway_db: PathwayDatabase,
    interactions: Optional[InteractionTable] = None,
    cell_prop: float = 0.2,
    pathway: Optional[Union[str, Sequence[str]]] = None,
    add_lig: bool = True,
    max_occurrence: int = 500,
    most_variables: bool = True,
    connected: bool = False,
    restrict_genes: Optional[Iterable[str]] = None,
    verbose: bool = True,
) -> Dict[str, IntracellularNetwork]:
    """Intracellular networks downstream of each gene of interest in the cluster ``coi``.

    Edges of ``pathway_db`` are kept when both genes are expressed in at least
    ``cell_prop`` of the ``coi`` cells and the edge belongs to a pathway that
    contains the receptor (pathways occurring more than ``max_occurrence``
    times in the database are ignored). With ``add_lig`` and ``interactions``,
    ligands of other clusters that target the receptor are grafted as
    "extra" edges. ``connected`` prunes nodes unreachable from the receptor.

    Returns one entry per gene of interest; receptors that are not expressed
    or have no interaction get an empty network.
    """
    goi_list = [goi] if isinstance(goi, str) else list(goi)
    cells = clusters.cells_of(coi)
    if pathway is not None:
        pathway_db = pathway_db.restrict(pathway)

    data = expr.data(most_variables)
    if most_variables and expr.most_variable is not None and verbose:
        _safe_log("[info] Matrix of most variable genes used. To use the whole matrix set most_variables to False.")

    coi_data = data[cells]
    coi_data = coi_data[coi_data.sum(axis=1) > 0]
    resolved = {g: expr.to_human(g) for g in goi_list}
    receptors = [r for r in resolved.values() if r is not None]

    frac = (coi_data > 0).mean(axis=1)
    visible = set(frac.index[frac >= cell_prop])
    if restrict_genes is not None:
        visible &= set(restrict_genes)
    visible |= set(receptors)

    gmap = genes_in(data.index)
    db_edges = _db_in_matrix_symbols(pathway_db, gmap)
    visible_edges = simplify_interactions(
        db_edges[db_edges["a_gene"].isin(visible) & db_edges["b_gene"].isin(visible)]
    )
    tag_lists = pathway_db.tags()
    occ = pathway_db.occurrences()
    good_pw = set(occ.index[occ <= max_occurrence]) - {ADDED_TAG}

    res: Dict[str, IntracellularNetwork] = {}
    for g in goi_list:
        r = resolved[g]
        if r is None or r not in coi_data.index:
            _safe_log(f"[warn] {g} is not expressed in {coi}")
            res[g] = IntracellularNetwork(receptor=r or g, coi=coi)
            continue

        touch = (db_edges["a_gene"] == r) | (db_edges["b_gene"] == r)
        contains = set(tag_lists[touch].explode().dropna()) & good_pw
        if verbose:
            if contains:
                _safe_log(f"[info] Pathway(s) that include {g}:")
                for p in sorted(contains):
                    _safe_log(f"[info]    - {p}")
            else:
                _safe_log(f"[info] No pathways including {g} that have a maximum occurrence of {max_occurrence}.")

        in_contains = tag_lists.map(lambda ts: bool(contains.intersection(ts)))
        contain_edges = simplify_interactions(db_edges[in_contains.to_numpy()])
        key_visible = visible_edges["a_gene"] + "|" + visible_edges["b_gene"]
        key_contain = set(contain_edges["a_gene"] + "|" + contain_edges["b_gene"])
        net_n = visible_edges[key_visible.isin(key_contain).to_numpy()]

        if net_n.empty:
            _safe_log(f"[warn] No interactions found for {g} in {coi}.")
            res[g] = IntracellularNetwork(receptor=r, coi=coi)
            continue

        intra = pd.DataFrame(
            dict(
                a_gene=net_n["a_gene"].to_numpy(),
                b_gene=net_n["b_gene"].to_numpy(),
                cluster=coi,
                location="intra",
                int_type=net_n["int_type"].to_numpy(),
                pathway=net_n["pathway"].to_numpy(),
                weight=np.nan,
            ),
            columns=EDGE_COLUMNS,
        )
        parts = [intra]
        if add_lig and interactions is not None:
            extra = _ligand_edges(r, coi, interactions)
            if not extra.empty:
                parts.insert(0, extra)
        edges = pd.concat(parts, ignore_index=True) if len(parts) > 1 else intra

        graph, edges = _build_graph(edges, r, expr, coi_data, connected)
        if graph.number_of_edges() == 0:
            # every edge was pruned as unreachable from the receptor
            _safe_log(f"[warn] No interactions found for {g} in {coi}.")
            res[g] = IntracellularNetwork(receptor=r, coi=coi)
            continue
        enrichment = pathway_enrichment(edges[edges["location"] == "intra"], pathway_db, max_occurrence)
        if enrichment.empty and verbose:
            _safe_log(f"[info] No significant associated pathway for {g} in {coi}")
        res[g] = IntracellularNetwork(receptor=r, coi=coi, graph=graph, edges=edges, enrichment=enrichment)
        if verbose:
            _safe_log(
                f"[info] {g} in {coi}: {graph.number_of_nodes()} genes, {graph.number_of_edges()} interactions, "
                f"{len(enrichment)} significant pathway(s)"
            )
    return res
