from __future__ import annotations

import glob
import os
import sys
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

HUMAN_SPECIES = ("hsapiens", "human")
NORMALIZE_METHODS = ("quantile", "library", "none")
CLUSTER_METHODS = ("kmeans",)
ORTHOLOG_METHODS = ("gprofiler",)


class InputError(ValueError):
    """Malformed or missing input matrix, or nothing left after filtering."""


class ConfigError(ValueError):
    """Invalid parameter value or parameter combination."""


class UnknownPathwayError(LookupError):
    """A pathway filter that matches no pathway of the database."""


def _safe_log(msg: str) -> None:
    sys.stderr.write(msg + "\n")
    sys.stderr.flush()


def _is_tsv_or_csv(path: str) -> bool:
    return any(path.lower().endswith(ext) for ext in (".tsv", ".csv", ".txt"))


def _read_delim(path: str) -> pd.DataFrame:
    if path.lower().endswith(".tsv") or path.lower().endswith(".txt"):
        return pd.read_csv(path, sep="\t")
    return pd.read_csv(path)


def _is_human(species: str) -> bool:
    return str(species).lower() in HUMAN_SPECIES


@dataclass(frozen=True)
class ExpressionMatrix:
    """Normalized genes x cells matrix shared read-only by every analysis step.

    ``orthologs`` maps human symbols (index) to the symbols of the original
    species and is only set when the data was converted from another species.
    ``most_variable`` holds the reduced matrix when it was requested.
    """

    counts: pd.DataFrame
    species: str = "hsapiens"
    orthologs: Optional[pd.Series] = None
    most_variable: Optional[pd.DataFrame] = None
    params: Dict[str, object] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.counts.index.has_duplicates:
            raise InputError("Gene identifiers must be unique")
        if self.most_variable is not None and list(self.most_variable.columns) != list(self.counts.columns):
            raise InputError("Most variable matrix must share the cell ordering of the full matrix")

    @property
    def genes(self) -> List[str]:
        return list(self.counts.index)

    @property
    def cells(self) -> List[str]:
        return list(self.counts.columns)

    @property
    def is_human(self) -> bool:
        return _is_human(self.species)

    def data(self, most_variables: bool = False) -> pd.DataFrame:
        if most_variables and self.most_variable is not None:
            return self.most_variable
        return self.counts

    def species_label(self, gene: str) -> str:
        """Symbol of ``gene`` in the original species (identity for human data)."""
        if self.orthologs is None:
            return gene
        return str(self.orthologs.get(gene, gene))

    def to_human(self, gene: str) -> Optional[str]:
        """Resolve a gene given in either human or original-species symbols."""
        if gene in self.counts.index:
            return gene
        if self.orthologs is not None:
            hits = self.orthologs.index[self.orthologs.astype(str).str.lower() == str(gene).lower()]
            if len(hits):
                return str(hits[0])
        upper = {str(g).upper(): g for g in self.counts.index}
        return upper.get(str(gene).upper())


def _split_gene_column(table: pd.DataFrame, from_file: bool) -> pd.DataFrame:
    if table.empty or table.shape[1] < 1:
        raise InputError("Expression table is empty")
    df = table.copy()
    first = df.columns[0]
    if from_file or not pd.api.types.is_numeric_dtype(df[first]):
        if df.shape[1] < 2:
            raise InputError("Expression table malformed: need gene column + >=1 cell columns")
        genes = df[first].astype(str).str.strip()
        df = df.drop(columns=[first])
        df.index = genes
    else:
        df.index = df.index.astype(str)
    bad = [c for c in df.columns if not pd.api.types.is_numeric_dtype(df[c])]
    if bad:
        raise InputError(
            "Non-numeric cell column(s): " + ", ".join(map(str, bad[:5])) + (" …" if len(bad) > 5 else "")
        )
    df = df.astype(float)
    if df.isna().to_numpy().any():
        raise InputError("Expression table contains missing values")
    if (df.to_numpy() < 0).any():
        raise InputError("Expression values must be >= 0")
    df.columns = [str(c) for c in df.columns]
    return df[~df.index.duplicated(keep="first")]


def read_expression_table(source: Union[str, os.PathLike, pd.DataFrame]) -> pd.DataFrame:
    """Parse the input boundary: first column (or index) is the gene id, the rest are cells."""
    if isinstance(source, pd.DataFrame):
        return _split_gene_column(source, from_file=False)
    path = os.fspath(source)
    if not os.path.exists(path):
        raise InputError(f"{path} doesn't exist.")
    if not _is_tsv_or_csv(path):
        raise InputError(f"{path} must be .csv, .tsv, or .txt (genes x cells)")
    return _split_gene_column(_read_delim(path), from_file=True)


def _quantile_filter(df: pd.DataFrame, lower: float, upper: float) -> pd.DataFrame:
    df = df[df.sum(axis=1) > 0]
    if df.empty:
        return df
    rs = df.sum(axis=1)
    hi = np.quantile(rs.to_numpy(), 1 - upper)
    lo = np.quantile(rs.to_numpy(), lower)
    return df[(rs <= hi) & (rs >= lo)]


def normalize_quantile(df: pd.DataFrame) -> pd.DataFrame:
    """Scale each cell by its 99th percentile relative to the median one, then log1p."""
    df = df[df.sum(axis=1) > 0]
    q = df.quantile(0.99, axis=0)
    df = df.loc[:, q > 0]
    q = q[q > 0]
    if df.empty:
        return df
    return np.log1p(df.div(q / float(np.median(q.to_numpy())), axis=1))


def normalize_library(df: pd.DataFrame, target_sum: float = 1e4) -> pd.DataFrame:
    df = df[df.sum(axis=1) > 0]
    lib = df.sum(axis=0)
    df = df.loc[:, lib > 0]
    return np.log1p(df.div(lib[lib > 0], axis=1) * target_sum)


def _read_ortholog_table(ortholog_map) -> Dict[str, str]:
    if isinstance(ortholog_map, Mapping):
        return {str(k): str(v) for k, v in ortholog_map.items()}
    if isinstance(ortholog_map, pd.DataFrame):
        table = ortholog_map
    else:
        path = os.fspath(ortholog_map)
        if not os.path.exists(path):
            raise InputError(f"{path} doesn't exist.")
        table = _read_delim(path)
    if table.shape[1] != 2:
        raise InputError("Ortholog table must have exactly two columns: species symbol, human symbol")
    table = table.dropna()
    return dict(zip(table.iloc[:, 0].astype(str), table.iloc[:, 1].astype(str)))


def find_orthologs(species: str, genes: Sequence[str], method: str = "gprofiler") -> Dict[str, str]:
    """Query the external ortholog service for ``genes`` of ``species`` -> human symbols."""
    if method not in ORTHOLOG_METHODS:
        raise ConfigError(f"ortholog_method must be one of {', '.join(ORTHOLOG_METHODS)}")
    import importlib

    gprofiler = importlib.import_module("gprofiler")
    gp = gprofiler.GProfiler(user_agent="signal_builder", return_dataframe=True)
    res = gp.orth(organism=species, target="hsapiens", query=list(genes))
    res = res[res["name"].astype(str).str.upper() != "N/A"]
    return dict(zip(res["incoming"].astype(str), res["name"].astype(str)))


def one_to_one(mapping: Mapping[str, str]) -> Dict[str, str]:
    """Drop every pair whose source or target symbol occurs more than once."""
    pairs = pd.DataFrame(list(mapping.items()), columns=["species", "human"]).drop_duplicates()
    pairs = pairs[~pairs["species"].duplicated(keep=False) & ~pairs["human"].duplicated(keep=False)]
    return dict(zip(pairs["species"], pairs["human"]))


def _zero_rate(df: pd.DataFrame) -> float:
    return round(float((df.to_numpy() == 0).sum()) * 1000 / max(df.size, 1)) / 10


def reduce_to_most_variable(counts: pd.DataFrame, n: int, verbose: bool = True) -> pd.DataFrame:
    """Keep the ``n`` genes with the largest coefficient of variation.

    Only genes whose mean is strictly above the median gene mean compete, so
    lowly expressed genes cannot win on noise alone. When fewer genes qualify,
    all of them are returned and a warning is written.
    """
    m = counts.mean(axis=1)
    sd = counts.std(axis=1, ddof=1)
    cv = (sd / m)[m > float(np.quantile(m.to_numpy(), 0.5))]
    if len(cv) < n:
        _safe_log(f"[warn] Only {len(cv)} genes qualify as most variable (requested {n}); keeping all of them")
        keep = cv.sort_values(ascending=False, kind="mergesort").index
    else:
        keep = cv.sort_values(ascending=False, kind="mergesort").index[:n]
    out = counts.loc[keep]
    if verbose:
        _safe_log(f"[info] Most variable counts matrix: {out.shape[0]} genes, {out.shape[1]} cells, "
                  f"zero rate = {_zero_rate(out)}%")
    return out


def prepare(
    source,
    species: str = "hsapiens",
    most_variables: Union[int, float] = 0,
    normalize: str = "quantile",
    lower: float = 0.0,
    upper: float = 0.0,
    ortholog_map=None,
    ortholog_method: str = "gprofiler",
    verbose: bool = True,
) -> ExpressionMatrix:
    """Build the normalized expression store from a table or a delimited file.

    ``lower``/``upper`` remove that fraction of least/most expressed genes
    (by row sum). For a non-human ``species`` gene symbols are converted to
    human through a 1:1 ortholog dictionary (``ortholog_map`` or the external
    service) and the original symbols are kept in ``orthologs``.
    """
    if normalize not in NORMALIZE_METHODS:
        raise ConfigError(f"normalize must be one of {', '.join(NORMALIZE_METHODS)}")
    for name, v in (("lower", lower), ("upper", upper)):
        if not 0 <= float(v) <= 1:
            raise ConfigError(f"{name} must be in [0, 1], got {v}")

    df = read_expression_table(source)

    orthologs = None
    if not _is_human(species):
        if verbose:
            _safe_log("[info] Converting data to human data")
        if ortholog_map is not None:
            mapping = _read_ortholog_table(ortholog_map)
        else:
            mapping = find_orthologs(species, list(df.index), method=ortholog_method)
        mapping = one_to_one({k: v for k, v in mapping.items() if k in df.index})
        n_before = df.shape[0]
        df = df.loc[[g for g in df.index if g in mapping]]
        df.index = [mapping[g] for g in df.index]
        orthologs = pd.Series({h: s for s, h in mapping.items()}, dtype=object)
        if verbose:
            _safe_log(f"[info] Dictionary size: {len(mapping)} genes ({n_before - df.shape[0]} genes without 1:1 ortholog dropped)")

    if normalize == "quantile":
        if verbose:
            _safe_log("[info] Log-Normalization")
        df = _quantile_filter(normalize_quantile(df), lower, upper)
    elif normalize == "library":
        df = _quantile_filter(normalize_library(df), lower, upper)
    else:
        df = _quantile_filter(df, lower, upper)

    if df.empty or df.shape[1] == 0:
        raise InputError("Expression matrix is empty after filtering")
    if orthologs is not None:
        orthologs = orthologs.reindex(df.index)

    if verbose:
        _safe_log(f"[info] {df.shape[0]} genes")
        _safe_log(f"[info] {df.shape[1]} cells")
        _safe_log(f"[info] Zero rate = {_zero_rate(df)}%")

    mv = None
    if most_variables:
        if float(most_variables) >= 1 and float(most_variables).is_integer():
            mv = reduce_to_most_variable(df, int(most_variables), verbose=verbose)
        else:
            _safe_log(
                "[warn] most_variables should be an integer (number of genes to keep as regard to their "
                "variation). No most variable count matrix will be computed."
            )
            most_variables = 0

    return ExpressionMatrix(
        counts=df,
        species=species,
        orthologs=orthologs,
        most_variable=mv,
        params=dict(normalize=normalize, lower=lower, upper=upper, most_variables=int(most_variables)),
    )


def load_singlecell(sn_data: str) -> pd.DataFrame:
    """Read .h5ad, 10x .h5, a 10x mtx directory or a glob of those into a genes x cells table."""
    import importlib

    sc = importlib.import_module("scanpy")
    ad = importlib.import_module("anndata")
    from scipy import sparse as sp

    paths: List[str]
    if os.path.isdir(sn_data):
        paths = [sn_data]
    elif any(ch in sn_data for ch in "*?[]"):
        paths = sorted(glob.glob(sn_data))
    else:
        paths = [sn_data]
    if not paths or not all(os.path.exists(p) for p in paths):
        raise InputError(f"No files matched for {sn_data}")

    adatas = []
    for p in paths:
        sample = os.path.splitext(os.path.basename(p))[0]
        if os.path.isdir(p):
            mdir = p
            if os.path.isdir(os.path.join(p, "filtered_feature_bc_matrix")):
                mdir = os.path.join(p, "filtered_feature_bc_matrix")
            A = sc.read_10x_mtx(mdir, var_names="gene_symbols", make_unique=False)
        elif p.lower().endswith(".h5"):
            A = sc.read_10x_h5(p)
        elif p.lower().endswith(".h5ad"):
            A = sc.read_h5ad(p)
        else:
            raise InputError(f"Unsupported file: {p}")
        if "feature_types" in A.var.columns:
            keep = A.var["feature_types"].astype(str).str.contains("Gene Expression", case=False, regex=False)
            A = A[:, keep.to_numpy()].copy()
        if len(paths) > 1:
            A.obs_names = pd.Index([f"{sample}-{i}" for i in range(A.n_obs)])
        adatas.append(A)

    adata = adatas[0] if len(adatas) == 1 else ad.concat(adatas, join="outer", index_unique=None)
    X = adata.X.toarray() if sp.issparse(adata.X) else np.asarray(adata.X)
    out = pd.DataFrame(X.T, index=pd.Index(adata.var_names.astype(str)), columns=list(adata.obs_names))
    return out[~out.index.duplicated(keep="first")]


@dataclass(frozen=True)
class ClusterAssignment:
    ids: pd.Series
    names: Tuple[str, ...]

    @property
    def n_clusters(self) -> int:
        return len(self.names)

    def name_of(self, cluster_id: int) -> str:
        return self.names[int(cluster_id) - 1]

    def id_of(self, name: str) -> int:
        if name not in self.names:
            raise ConfigError(
                f"{name} must be included in the cluster names ({', '.join(self.names)}). If no names are "
                "provided, clusters are named cluster 1, cluster 2, ..., cluster N."
            )
        return self.names.index(name) + 1

    def cells_of(self, name: str) -> List[str]:
        cid = self.id_of(name)
        return list(self.ids.index[self.ids.to_numpy() == cid])

    def sizes(self) -> pd.Series:
        return pd.Series({n: int((self.ids == i + 1).sum()) for i, n in enumerate(self.names)})

    def labels(self) -> pd.Series:
        """Cluster name per cell."""
        return self.ids.map(lambda i: self.names[int(i) - 1])


def validate_cluster_names(names: Sequence[str], n_clusters: int) -> Tuple[str, ...]:
    names = tuple(str(n) for n in names)
    if (
        len(names) != n_clusters
        or len(set(names)) != len(names)
        or any(("/" in n) or ("\\" in n) for n in names)
    ):
        raise ConfigError(
            "The number of cluster names must equal the number of clusters and must contain no duplicates. "
            "Cluster names must not include path separators."
        )
    return names


def add_clustering(
    expr: ExpressionMatrix,
    cluster_ids: Union[Sequence[int], pd.Series, np.ndarray],
    names: Optional[Sequence[str]] = None,
) -> ClusterAssignment:
    """Attach an externally computed cluster vector to the cells of ``expr``.

    A Series is aligned on cell identifiers, anything else is taken in cell
    order. Ids are shifted so that the smallest is 1.
    """
    cells = expr.cells
    if isinstance(cluster_ids, pd.Series):
        missing = [c for c in cells if c not in cluster_ids.index]
        if missing:
            raise InputError(f"{len(missing)} cell(s) have no cluster id, e.g. {missing[0]}")
        ids = cluster_ids.reindex(cells)
    else:
        arr = np.asarray(cluster_ids)
        if arr.shape[0] != len(cells):
            raise InputError(f"Got {arr.shape[0]} cluster ids for {len(cells)} cells")
        ids = pd.Series(arr, index=cells)
    try:
        ids = ids.astype(int)
    except (TypeError, ValueError) as e:
        raise InputError(f"Cluster ids must be integers: {e}") from e
    ids = ids + 1 - int(ids.min())
    n = int(ids.max())
    if set(ids.unique()) != set(range(1, n + 1)):
        raise ConfigError("Cluster ids must be contiguous integers")
    if names is None:
        names = [f"cluster {i}" for i in range(1, n + 1)]
    return ClusterAssignment(ids=ids, names=validate_cluster_names(names, n))


def cluster_cells(
    expr: ExpressionMatrix,
    n_clusters: int,
    method: str = "kmeans",
    seed: int = 0,
    most_variables: bool = True,
) -> pd.Series:
    """Label cells with an external clustering algorithm; returns 1-based ids per cell."""
    if method not in CLUSTER_METHODS:
        raise ConfigError(f"method must be one of {', '.join(CLUSTER_METHODS)}")
    if n_clusters < 1:
        raise ConfigError("n_clusters must be >= 1")
    from sklearn.cluster import KMeans

    X = expr.data(most_variables).T.to_numpy(dtype=float)
    if n_clusters > X.shape[0]:
        raise ConfigError(f"n_clusters ({n_clusters}) exceeds the number of cells ({X.shape[0]})")
    labels = KMeans(n_clusters=n_clusters, random_state=int(seed), n_init=10).fit_predict(X)
    # ids numbered by first appearance
    codes, _ = pd.factorize(labels)
    return pd.Series(codes + 1, index=expr.cells, name="cluster")


def embed_cells(expr: ExpressionMatrix, seed: int = 0, most_variables: bool = True) -> pd.DataFrame:
    """2-D t-SNE embedding of the cells through scanpy."""
    import importlib

    sc = importlib.import_module("scanpy")
    ad = importlib.import_module("anndata")
    X = expr.data(most_variables).T
    adata = ad.AnnData(X=X.to_numpy(dtype=np.float32))
    adata.obs_names = list(X.index)
    perplexity = max(2.0, min(30.0, (adata.n_obs - 1) / 3.0))
    sc.tl.tsne(adata, random_state=seed, perplexity=perplexity, use_rep="X")
    return pd.DataFrame(adata.obsm["X_tsne"], index=adata.obs_names, columns=["tsne1", "tsne2"])


def genes_in(expr_genes: Iterable[str]) -> Dict[str, str]:
    """Case-insensitive lookup: upper-cased symbol -> symbol used in the matrix."""
    return {str(g).upper(): g for g in expr_genes}
