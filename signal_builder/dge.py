from __future__ import annotations

import warnings
from typing import Dict, Tuple

import numpy as np
import pandas as pd

from .core import ClusterAssignment, ConfigError, ExpressionMatrix, _safe_log

DGE_COLUMNS = ["gene", "mean_in", "mean_out", "log2fc", "pval", "qval"]


def nb_lrt(y: np.ndarray, group: np.ndarray) -> Tuple[float, float]:
    """Negative-binomial GLM likelihood-ratio test of ``y ~ group`` against ``y ~ 1``.

    Returns (lr statistic, p-value).
    """
    import statsmodels.api as sm
    from scipy import stats

    family = sm.families.NegativeBinomial()
    full_x = np.column_stack([np.ones_like(group, dtype=float), group.astype(float)])
    null_x = np.ones((len(y), 1))
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        full = sm.GLM(y, full_x, family=family).fit()
        null = sm.GLM(y, null_x, family=family).fit()
    lrstat = max(-2 * (null.llf - full.llf), 0.0)
    lrdf = null.df_resid - full.df_resid
    return float(lrstat), float(stats.chi2.sf(lrstat, df=lrdf))


def _check_clusters(clusters: ClusterAssignment) -> None:
    if clusters.n_clusters < 2:
        raise ConfigError("Differential expression needs at least 2 clusters")
    sizes = clusters.sizes()
    small = sizes[sizes < 2]
    if not small.empty:
        raise ConfigError("Differential expression needs at least 2 cells per cluster: " + ", ".join(small.index))


def dge(
    expr: ExpressionMatrix,
    clusters: ClusterAssignment,
    pval_threshold: float = 0.05,
    most_variables: bool = False,
    min_detect: float = 0.1,
    verbose: bool = True,
) -> Dict[str, pd.DataFrame]:
    """Marker genes of each cluster against all remaining cells.

    Each gene detected in more than ``min_detect`` of the cells of either group
    is tested with a negative-binomial GLM likelihood-ratio test on the
    de-logged expression; p-values are Benjamini-Hochberg adjusted per cluster
    and genes with ``qval < pval_threshold`` are kept.
    """
    from statsmodels.stats.multitest import multipletests
    from statsmodels.tools.sm_exceptions import PerfectSeparationError

    _check_clusters(clusters)
    if not 0 < pval_threshold <= 1:
        raise ConfigError("pval_threshold must be in (0, 1]")
    data = expr.data(most_variables)
    # undo log1p so the GLM sees count-like values
    counts = np.expm1(data.to_numpy(dtype=float))
    det = data.to_numpy() > 0
    labels = clusters.labels().reindex(data.columns).to_numpy()

    out: Dict[str, pd.DataFrame] = {}
    for name in clusters.names:
        group = labels == name
        keep = (det[:, group].mean(axis=1) > min_detect) | (det[:, ~group].mean(axis=1) > min_detect)
        rows = []
        for i in np.flatnonzero(keep):
            y = counts[i]
            m_in, m_out = float(y[group].mean()), float(y[~group].mean())
            try:
                _, p = nb_lrt(y, group)
            except (ValueError, np.linalg.LinAlgError, PerfectSeparationError):
                p = 1.0
            if not np.isfinite(p):
                p = 1.0
            rows.append(
                dict(
                    gene=data.index[i],
                    mean_in=m_in,
                    mean_out=m_out,
                    log2fc=float(np.log2((m_in + 1) / (m_out + 1))),
                    pval=p,
                )
            )
        tab = pd.DataFrame(rows, columns=DGE_COLUMNS[:-1])
        if tab.empty:
            tab["qval"] = []
        else:
            tab["qval"] = multipletests(tab["pval"].to_numpy(), method="fdr_bh")[1]
            tab = tab[tab["qval"] < pval_threshold]
            tab = tab.sort_values(["qval", "log2fc"], ascending=[True, False], kind="mergesort")
        out[name] = tab.reset_index(drop=True)[DGE_COLUMNS]
        if verbose:
            _safe_log(f"[info] {name}: {len(out[name])} differentially expressed genes")
    return out
