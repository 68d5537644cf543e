from __future__ import annotations

import math

import numpy as np
import pandas as pd
import pytest

from signal_builder.core import UnknownPathwayError, add_clustering, prepare
from signal_builder.databases import PathwayDatabase, switch_db
from signal_builder.network import (
    STATUS_GOI,
    STATUS_LIGAND,
    STATUS_PATHWAY,
    pathway_enrichment,
    intra_network,
)
from signal_builder.signaling import cell_signaling


def _edge_set(net):
    return set(zip(net.edges["a_gene"], net.edges["b_gene"]))


def test_network_keeps_expressed_pathway_edges(network_data, pathway_db):
    expr, clusters, _ = network_data
    net = intra_network(expr, clusters, "EGFR", "c1", pathway_db, verbose=False)["EGFR"]

    assert not net.is_empty
    assert _edge_set(net) == {
        ("EGFR", "GRB2"),
        ("GRB2", "SOS1"),
        ("SOS1", "HRAS"),
        ("HRAS", "RAF1"),
        ("ISO1", "ISO2"),
    }
    # MAP2K1 is not in the matrix, ZZZ-YYY shares no pathway with EGFR
    assert "MAP2K1" not in net.graph
    assert "ZZZ" not in net.graph
    assert net.graph.number_of_nodes() == 7
    assert (net.edges["location"] == "intra").all()
    assert (net.edges["cluster"] == "c1").all()


def test_parallel_edges_are_merged(network_data, pathway_db):
    expr, clusters, _ = network_data
    net = intra_network(expr, clusters, "EGFR", "c1", pathway_db, verbose=False)["EGFR"]
    attrs = net.graph.edges["GRB2", "SOS1"]
    assert attrs["pathway"] == "P1;P3"
    assert attrs["int_type"] == "in-complex-with,controls-state-change-of"
    assert len(net.edges[(net.edges["a_gene"] == "GRB2") & (net.edges["b_gene"] == "SOS1")]) == 1


def test_node_attributes_and_distances(network_data, pathway_db):
    expr, clusters, _ = network_data
    g = intra_network(expr, clusters, "EGFR", "c1", pathway_db, verbose=False)["EGFR"].graph

    assert g.nodes["EGFR"]["status"] == STATUS_GOI
    assert g.nodes["EGFR"]["distance"] == 0
    assert g.nodes["EGFR"]["expression"] == 3.0
    assert g.nodes["GRB2"]["status"] == STATUS_PATHWAY
    assert g.nodes["GRB2"]["expression"] == 2.0
    assert [g.nodes[v]["distance"] for v in ("GRB2", "SOS1", "HRAS", "RAF1")] == [1, 2, 3, 4]
    # unreachable nodes are placed next to the receptor
    assert g.nodes["ISO1"]["distance"] == 1 and g.nodes["ISO2"]["distance"] == 1


def test_connected_prunes_unreachable_nodes(network_data, pathway_db):
    expr, clusters, _ = network_data
    net = intra_network(expr, clusters, "EGFR", "c1", pathway_db, connected=True, verbose=False)["EGFR"]
    assert net.graph.number_of_edges() == 4
    assert net.graph.number_of_nodes() == 5
    assert "ISO1" not in net.graph


def test_enrichment_keeps_only_significant_pathways(network_data, pathway_db):
    expr, clusters, _ = network_data
    net = intra_network(expr, clusters, "EGFR", "c1", pathway_db, verbose=False)["EGFR"]
    enr = net.enrichment
    assert list(enr["pathway"]) == ["P1"]
    assert enr.loc[0, "hits"] == 5
    assert enr.loc[0, "pathway_size"] == 6
    assert enr.loc[0, "qval"] < 0.05


def test_max_occurrence_drops_frequent_pathways(network_data, pathway_db):
    expr, clusters, _ = network_data
    net = intra_network(expr, clusters, "EGFR", "c1", pathway_db, max_occurrence=1, verbose=False)["EGFR"]
    assert _edge_set(net) == {("EGFR", "GRB2")}
    assert "P1" not in set(net.enrichment["pathway"])


def test_restrict_genes_limits_visible_nodes(network_data, pathway_db):
    expr, clusters, _ = network_data
    net = intra_network(
        expr, clusters, "EGFR", "c1", pathway_db, restrict_genes={"GRB2"}, verbose=False
    )["EGFR"]
    assert _edge_set(net) == {("EGFR", "GRB2")}


def test_ligands_are_grafted_upstream_of_receptor(network_data, pathway_db):
    expr, clusters, lrdb = network_data
    table = cell_signaling(expr, clusters, lrdb, verbose=False)
    assert list(table[("c2", "c1")]["ligand"]) == ["EGF"]

    net = intra_network(expr, clusters, "EGFR", "c1", pathway_db, interactions=table, verbose=False)["EGFR"]
    g = net.graph
    assert g.has_edge("c2-EGF", "EGFR")
    attrs = g.edges["c2-EGF", "EGFR"]
    assert attrs["location"] == "extra"
    assert attrs["int_type"] == "control"
    assert math.isclose(attrs["weight"], 3.0)
    assert g.nodes["c2-EGF"]["status"] == STATUS_LIGAND
    assert g.nodes["c2-EGF"]["label"] == "c2-EGF"
    assert len(net.intra_edges) == 5
    # grafted edges do not take part in the enrichment
    assert list(net.enrichment["pathway"]) == ["P1"]

    bare = intra_network(
        expr, clusters, "EGFR", "c1", pathway_db, interactions=table, add_lig=False, verbose=False
    )["EGFR"]
    assert "c2-EGF" not in bare.graph


def test_receptors_without_network_are_empty(network_data, pathway_db, capsys):
    expr, clusters, _ = network_data
    res = intra_network(expr, clusters, ["LONELY", "NOTAGENE", "EGF"], "c1", pathway_db)
    assert set(res) == {"LONELY", "NOTAGENE", "EGF"}
    assert all(net.is_empty for net in res.values())
    err = capsys.readouterr().err
    assert "No interactions found for LONELY" in err
    assert "NOTAGENE is not expressed in c1" in err
    assert "EGF is not expressed in c1" in err


def test_pathway_filter(network_data, pathway_db):
    expr, clusters, _ = network_data
    net = intra_network(expr, clusters, "EGFR", "c1", pathway_db, pathway="P4", verbose=False)["EGFR"]
    assert net.is_empty
    with pytest.raises(UnknownPathwayError):
        intra_network(expr, clusters, "EGFR", "c1", pathway_db, pathway="NOPE", verbose=False)


def test_gene_of_interest_is_case_insensitive(network_data, pathway_db):
    expr, clusters, _ = network_data
    net = intra_network(expr, clusters, "egfr", "c1", pathway_db, verbose=False)["egfr"]
    assert net.receptor == "EGFR"
    assert not net.is_empty


def test_pathway_enrichment_hypergeometric(pathway_db):
    edges = pd.DataFrame(
        {
            "a_gene": ["EGFR", "GRB2"],
            "b_gene": ["GRB2", "SOS1"],
            "pathway": ["P1;P2", "P1;added"],
        }
    )
    enr = pathway_enrichment(edges, pathway_db)
    # P1: k=2 of n=2 network edges, K=6 of N=48 database edges
    expected = (6 * 5) / (48 * 47)
    assert "added" not in set(enr["pathway"])
    p1 = enr[enr["pathway"] == "P1"].iloc[0]
    assert math.isclose(p1["pval"], expected, rel_tol=1e-9)
    assert list(enr["hits"]) == sorted(enr["hits"])

    empty = pathway_enrichment(edges.iloc[0:0], pathway_db)
    assert empty.empty
    assert list(empty.columns) == ["pathway", "hits", "pathway_size", "pval", "qval"]


def test_grafted_ligand_outside_reduced_matrix_keeps_weight(pathway_db):
    # EGF is scored on the full matrix but is not among the most variable genes
    values = {g: [4, 4, 4, 4, 0, 0, 0, 0] for g in ("EGFR", "GRB2", "SOS1")}
    values["EGF"] = [0, 0, 0, 0, 1, 1, 1, 1]
    for i in range(4):
        values[f"BG{i}"] = [1] * 8
    counts = pd.DataFrame(values, index=[f"cell{i}" for i in range(8)]).T
    expr = prepare(counts, normalize="none", most_variables=3, verbose=False)
    assert "EGF" not in expr.most_variable.index
    clusters = add_clustering(expr, [1] * 4 + [2] * 4, names=["c1", "c2"])
    lrdb = switch_db(pd.DataFrame({"ligand": ["EGF"], "receptor": ["EGFR"]}))
    table = cell_signaling(expr, clusters, lrdb, verbose=False)
    assert list(table[("c2", "c1")]["ligand_mean"]) == [1.0]

    net = intra_network(expr, clusters, "EGFR", "c1", pathway_db, interactions=table, verbose=False)["EGFR"]
    assert net.graph.edges["c2-EGF", "EGFR"]["weight"] == pytest.approx(1.0)
    assert net.graph.nodes["c2-EGF"]["expression"] == pytest.approx(1.0)


def test_connected_network_without_receptor_edges_is_empty(network_data, pathway_db, capsys):
    expr, clusters, _ = network_data
    loose = intra_network(
        expr, clusters, "EGFR", "c1", pathway_db, restrict_genes={"SOS1", "HRAS"}, verbose=False
    )["EGFR"]
    assert _edge_set(loose) == {("SOS1", "HRAS")}
    capsys.readouterr()

    net = intra_network(
        expr, clusters, "EGFR", "c1", pathway_db, restrict_genes={"SOS1", "HRAS"}, connected=True, verbose=False
    )["EGFR"]
    assert net.is_empty
    assert net.enrichment.empty
    assert "No interactions found for EGFR in c1" in capsys.readouterr().err


def test_enrichment_pvalues_fall_with_hits_and_qvalues_follow_pvalues():
    # five pathways of 10 edges each plus filler, N = 100
    rows = []
    for pw in ["PA", "PB", "PC", "PD", "PE"]:
        rows += [(f"{pw}{j}X", f"{pw}{j}Y", pw, "in-complex-with") for j in range(10)]
    rows += [(f"F{j}X", f"F{j}Y", "Filler", "in-complex-with") for j in range(50)]
    db = PathwayDatabase(pd.DataFrame(rows, columns=["a_gene", "b_gene", "pathway", "int_type"]))

    # PA hit once, PB twice, ... PE five times: n = 15
    net = pd.concat(
        [db.table[db.table["pathway"] == pw].head(k) for k, pw in enumerate(["PA", "PB", "PC", "PD", "PE"], 1)],
        ignore_index=True,
    )
    enr = pathway_enrichment(net, db, alpha=1.0)
    assert list(enr["pathway"]) == ["PA", "PB", "PC", "PD", "PE"]
    assert list(enr["hits"]) == [1, 2, 3, 4, 5]
    assert (enr["pathway_size"] == 10).all()

    pvals = enr["pval"].to_numpy()
    assert np.all(np.diff(pvals) <= 0)
    assert np.all(enr["qval"].to_numpy() >= pvals)
    by_p = enr.sort_values("pval", kind="mergesort")
    assert np.all(np.diff(by_p["qval"].to_numpy()) >= 0)
