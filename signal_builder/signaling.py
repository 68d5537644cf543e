from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Iterator, List, Mapping, Tuple

import numpy as np
import pandas as pd

from .core import (
    ClusterAssignment,
    ConfigError,
    ExpressionMatrix,
    _safe_log,
    genes_in,
    validate_cluster_names,
)
from .databases import LRDatabase

INT_TYPES = ("paracrine", "autocrine", "both")
SPECIFIC_BY = ("receptor", "ligand")
TABLE_COLUMNS = ["ligand", "receptor", "ligand_mean", "receptor_mean", "score", "specific"]

PairKey = Tuple[str, str]


def lr_score(ligand_mean, receptor_mean, c: float):
    """sqrt(l*r) / (c + sqrt(l*r)), with ``c`` the mean expression of the whole matrix.

    Increasing in both means, bounded in [0, 1) and unchanged when the matrix
    and the means are rescaled together.
    """
    lr = np.sqrt(np.asarray(ligand_mean, dtype=float) * np.asarray(receptor_mean, dtype=float))
    return lr / (c + lr)


@dataclass(frozen=True)
class InteractionTable:
    """Scored LR pairs per directed (sender, receiver) cluster pair. Read-only."""

    tables: Mapping[PairKey, pd.DataFrame]
    int_type: str
    cluster_names: Tuple[str, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "tables", MappingProxyType(dict(self.tables)))

    def __len__(self) -> int:
        return len(self.tables)

    def __iter__(self) -> Iterator[PairKey]:
        return iter(self.tables)

    def __getitem__(self, key: PairKey) -> pd.DataFrame:
        return self.tables[key]

    def keys(self) -> List[PairKey]:
        return list(self.tables)

    @staticmethod
    def label(key: PairKey) -> str:
        return f"{key[0]}-{key[1]}"

    def senders_to(self, receiver: str) -> Iterator[Tuple[str, pd.DataFrame]]:
        for (s, r), df in self.tables.items():
            if r == receiver:
                yield s, df

    def n_interactions(self) -> pd.Series:
        """Number of kept LR pairs per "sender-receiver" label."""
        return pd.Series({self.label(k): len(v) for k, v in self.tables.items()}, dtype=int)

    def to_frame(self) -> pd.DataFrame:
        """Long table with sender and receiver columns."""
        parts = [df.assign(sender=s, receiver=r) for (s, r), df in self.tables.items() if not df.empty]
        if not parts:
            return pd.DataFrame(columns=["sender", "receiver"] + TABLE_COLUMNS)
        out = pd.concat(parts, ignore_index=True)
        return out[["sender", "receiver"] + TABLE_COLUMNS]


def cluster_pairs(names: Tuple[str, ...], int_type: str) -> List[PairKey]:
    if int_type not in INT_TYPES:
        raise ConfigError(f"int_type must be one of {', '.join(INT_TYPES)}")
    pairs = []
    for s in names:
        for r in names:
            if int_type == "paracrine" and s == r:
                continue
            if int_type == "autocrine" and s != r:
                continue
            pairs.append((s, r))
    return pairs


def cluster_summaries(data: pd.DataFrame, clusters: ClusterAssignment) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Per-cluster mean expression and fraction of expressing cells (genes x cluster names)."""
    labels = clusters.labels().reindex(data.columns)
    means = data.T.groupby(labels.to_numpy(), sort=False).mean().T
    detect = (data > 0).T.groupby(labels.to_numpy(), sort=False).mean().T
    cols = [n for n in clusters.names if n in means.columns]
    return means[cols], detect[cols]


def _strict_max(values: pd.DataFrame, column: str) -> np.ndarray:
    """True where ``column`` is strictly larger than every other column of the row."""
    others = values.drop(columns=[column])
    if others.shape[1] == 0:
        return np.ones(len(values), dtype=bool)
    return (values[column].to_numpy() > others.max(axis=1).to_numpy())


def cell_signaling(
    expr: ExpressionMatrix,
    clusters: ClusterAssignment,
    lrdb: LRDatabase,
    int_type: str = "paracrine",
    min_cell_fraction: float = 0.1,
    s_score: float = 0.5,
    specific_by: str = "receptor",
    most_variables: bool = False,
    verbose: bool = True,
) -> InteractionTable:
    """Score every LR pair of ``lrdb`` for each (sender, receiver) pair selected by ``int_type``.

    ``paracrine`` considers sender != receiver, ``autocrine`` sender == receiver
    and ``both`` all ordered pairs. A pair is kept when the ligand is detected
    in more than ``min_cell_fraction`` of the sender cells, the receptor in more
    than ``min_cell_fraction`` of the receiver cells and the LR score reaches
    ``s_score``. ``specific`` marks pairs whose receptor (or ligand, with
    ``specific_by="ligand"``) is strictly highest in that cluster; ties flag no
    cluster.
    """
    if int_type not in INT_TYPES:
        raise ConfigError(f"int_type must be one of {', '.join(INT_TYPES)}")
    if specific_by not in SPECIFIC_BY:
        raise ConfigError(f"specific_by must be one of {', '.join(SPECIFIC_BY)}")
    if not 0 <= min_cell_fraction < 1:
        raise ConfigError("min_cell_fraction must be in [0, 1)")
    names = validate_cluster_names(clusters.names, int(clusters.ids.max()))

    data = expr.data(most_variables)
    if most_variables and expr.most_variable is not None and verbose:
        _safe_log("[info] Matrix of most variable genes used. To use the whole matrix set most_variables to False.")
    gmap = genes_in(data.index)
    lr = lrdb.table
    present = lr["ligand"].isin(gmap.keys()) & lr["receptor"].isin(gmap.keys())
    lr = lr[present]
    lig = [gmap[g] for g in lr["ligand"]]
    rec = [gmap[g] for g in lr["receptor"]]
    if verbose:
        _safe_log(f"[info] {len(lr)} of {len(lrdb)} ligand-receptor pairs have both genes in the matrix")

    means, detect = cluster_summaries(data, clusters)
    c = float(data.to_numpy().mean())
    lig_means, rec_means = means.loc[lig], means.loc[rec]
    lig_detect, rec_detect = detect.loc[lig], detect.loc[rec]

    tables: Dict[PairKey, pd.DataFrame] = {}
    for s, r in cluster_pairs(names, int_type):
        l_m = lig_means[s].to_numpy()
        r_m = rec_means[r].to_numpy()
        score = lr_score(l_m, r_m, c)
        keep = (
            (lig_detect[s].to_numpy() > min_cell_fraction)
            & (rec_detect[r].to_numpy() > min_cell_fraction)
            & (l_m > 0)
            & (r_m > 0)
            & (score >= s_score)
        )
        if specific_by == "receptor":
            specific = _strict_max(rec_means, r)
        else:
            specific = _strict_max(lig_means, s)
        df = pd.DataFrame(
            {
                "ligand": np.asarray(lig, dtype=object)[keep],
                "receptor": np.asarray(rec, dtype=object)[keep],
                "ligand_mean": l_m[keep],
                "receptor_mean": r_m[keep],
                "score": score[keep],
                "specific": specific[keep],
            },
            columns=TABLE_COLUMNS,
        )
        df = df.sort_values("score", ascending=False, kind="mergesort").reset_index(drop=True)
        tables[(s, r)] = df
        if verbose:
            _safe_log(f"[info] {s} -> {r}: {len(df)} interactions")
    if verbose and not any(len(v) for v in tables.values()):
        _safe_log("[warn] No significant interaction found for any cluster pair")
    return InteractionTable(tables=tables, int_type=int_type, cluster_names=names)
