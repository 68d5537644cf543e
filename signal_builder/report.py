from __future__ import annotations

import os
from typing import Dict, List, Mapping, Optional, Tuple

import networkx as nx
import numpy as np
import pandas as pd

from .core import ExpressionMatrix, _safe_log
from .network import STATUS_GOI, STATUS_LIGAND, IntracellularNetwork
from .signaling import InteractionTable


def _ensure_dir(path: str) -> None:
    os.makedirs(path, exist_ok=True)


def write_prepared(expr: ExpressionMatrix, out_dir: str) -> Tuple[str, str]:
    """data.txt (normalized matrix) and genes.txt (row-aligned gene list)."""
    _ensure_dir(out_dir)
    data_path = os.path.join(out_dir, "data.txt")
    genes_path = os.path.join(out_dir, "genes.txt")
    expr.counts.to_csv(data_path, sep="\t", index=False)
    genes = pd.DataFrame({"gene": expr.genes})
    if expr.orthologs is not None:
        genes["initial_ortholog"] = [expr.species_label(g) for g in expr.genes]
    genes.to_csv(genes_path, sep="\t", index=False)
    return data_path, genes_path


def write_clustering(
    ids: pd.Series,
    out_dir: str,
    method: str,
    embedding: Optional[pd.DataFrame] = None,
) -> List[str]:
    _ensure_dir(out_dir)
    n = int(ids.max())
    paths = [os.path.join(out_dir, f"cluster-{n}-{method}.txt")]
    ids.rename("cluster").to_frame().rename_axis("cell").to_csv(paths[0], sep="\t")
    if embedding is not None:
        paths.append(os.path.join(out_dir, f"tsne-{n}-{method}.txt"))
        embedding.rename_axis("cell").to_csv(paths[1], sep="\t")
    return paths


def write_dge_tables(tables: Mapping[str, pd.DataFrame], out_dir: str) -> List[str]:
    _ensure_dir(out_dir)
    paths = []
    for name, tab in tables.items():
        p = os.path.join(out_dir, f"table_dge_{name}.txt")
        tab.to_csv(p, sep="\t", index=False)
        paths.append(p)
    return paths


def write_interactions(table: InteractionTable, out_dir: str, expr: Optional[ExpressionMatrix] = None) -> List[str]:
    """One tab-separated file per non-empty cluster pair, with species symbols when available."""
    _ensure_dir(out_dir)
    paths = []
    for key in table:
        tab = table[key]
        if tab.empty:
            continue
        tab = tab.copy()
        if expr is not None and expr.orthologs is not None:
            tab["ligand"] = tab["ligand"].map(expr.species_label)
            tab["receptor"] = tab["receptor"].map(expr.species_label)
        p = os.path.join(out_dir, f"{table.label(key)}.txt")
        tab.to_csv(p, sep="\t", index=False)
        paths.append(p)
    return paths


def write_network(net: IntracellularNetwork, out_dir: str) -> List[str]:
    """GraphML connectivity graph and pathway enrichment table (sorted by qval)."""
    _ensure_dir(out_dir)
    if net.is_empty:
        return []
    stem = f"{net.coi}-{net.receptor}"
    paths = []
    if not net.enrichment.empty:
        p = os.path.join(out_dir, f"intracell_network_pathway_analysis_{stem}.txt")
        net.enrichment.sort_values("qval", kind="mergesort").to_csv(p, sep="\t", index=False)
        paths.append(p)
    p = os.path.join(out_dir, f"intracell_network_{stem}.graphml")
    nx.write_graphml(net.graph, p)
    paths.append(p)
    return paths


def read_network(path: str) -> nx.DiGraph:
    g = nx.read_graphml(path)
    if not g.is_directed():
        g = nx.DiGraph(g)
    return g


def layered_layout(graph: nx.DiGraph) -> Dict[str, Tuple[float, float]]:
    """Receptor at the origin, ligands on the row above, other genes one row per distance below."""
    rows: Dict[int, List[str]] = {}
    for v, d in graph.nodes(data=True):
        level = -1 if d.get("status") == STATUS_LIGAND else int(d.get("distance", 1))
        rows.setdefault(level, []).append(v)
    pos = {}
    for level, nodes in rows.items():
        xs = np.linspace(-10, 10, len(nodes)) if len(nodes) > 1 else [0.0]
        for i, (v, x) in enumerate(zip(sorted(nodes), xs)):
            # alternate small vertical offsets so labels of a crowded row do not collide
            jitter = 0.0 if len(nodes) < 2 else (0.2 if i % 2 else -0.2)
            pos[v] = (float(x), float(-level + jitter))
    return pos


def make_network_pdf_report(networks: Mapping[str, IntracellularNetwork], output_pdf_path: str) -> Optional[str]:
    import matplotlib.pyplot as plt
    import seaborn as sns
    from matplotlib.backends.backend_pdf import PdfPages

    nets = [n for n in networks.values() if not n.is_empty]
    if not nets:
        _safe_log("[warn] No non-empty network to report")
        return None
    os.makedirs(os.path.dirname(output_pdf_path) or ".", exist_ok=True)
    colors = {STATUS_GOI: "indianred", STATUS_LIGAND: "lightyellow"}
    with PdfPages(output_pdf_path) as pdf:
        for net in nets:
            g = net.graph
            has_pw = not net.enrichment.empty
            fig, axes = plt.subplots(2 if has_pw else 1, 1, figsize=(8.5, 11 if has_pw else 6.5))
            ax = axes[0] if has_pw else axes
            pos = layered_layout(g)
            node_color = [colors.get(d["status"], "lightcyan") for _, d in g.nodes(data=True)]
            sizes = [max(float(d.get("expression", 0.0)), 0.05) * 300 for _, d in g.nodes(data=True)]
            nx.draw_networkx_edges(g, pos, ax=ax, edge_color="gray", arrows=True, arrowsize=8)
            nx.draw_networkx_nodes(g, pos, ax=ax, node_color=node_color, node_size=sizes, edgecolors="gray")
            nx.draw_networkx_labels(g, pos, labels=dict(g.nodes(data="label")), ax=ax, font_size=7)
            ax.set_title(f"{net.coi}: {net.receptor}")
            ax.axis("off")
            if has_pw:
                ax2 = axes[1]
                enr = net.enrichment.assign(pathway=net.enrichment["pathway"] + " *")
                sns.barplot(data=enr, y="pathway", x="hits", ax=ax2, color="#DDE8F0", edgecolor="gray")
                ax2.set_title(f"{net.receptor} related pathways")
                ax2.set_ylabel("")
            fig.tight_layout()
            pdf.savefig(fig)
            plt.close(fig)
    return output_pdf_path
