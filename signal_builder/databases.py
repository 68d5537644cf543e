from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import FrozenSet, Iterable, Iterator, List, NamedTuple, Optional, Sequence, Union

import pandas as pd

from .core import ConfigError, InputError, UnknownPathwayError, _read_delim

DATA_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "data")
DEFAULT_LR_DB = os.path.join(DATA_DIR, "lr_pairs.tsv")
DEFAULT_PATHWAY_DB = os.path.join(DATA_DIR, "pathways.tsv")

ADDED_TAG = "added"


class LRRecord(NamedTuple):
    ligand: str
    receptor: str


class PathwayRecord(NamedTuple):
    a_gene: str
    b_gene: str
    pathways: FrozenSet[str]
    int_type: str


def _clean_symbols(s: pd.Series) -> pd.Series:
    return s.astype(str).str.strip().str.upper()


def _split_tags(value) -> List[str]:
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return []
    return [t.strip() for t in str(value).split(";") if t.strip()]


def _join_unique(values: Iterable[str], sep: str) -> str:
    seen: List[str] = []
    for v in values:
        for t in (_split_tags(v) if sep == ";" else [x.strip() for x in str(v).split(sep)]):
            if t and t not in seen:
                seen.append(t)
    return sep.join(seen)


@dataclass(frozen=True)
class LRDatabase:
    """Ligand-receptor pairs with upper-cased, stripped symbols and no duplicate pairs."""

    table: pd.DataFrame

    def __post_init__(self) -> None:
        df = self.table
        if not {"ligand", "receptor"}.issubset(df.columns):
            raise ConfigError("LR database must have columns: ligand, receptor")
        df = df.dropna(subset=["ligand", "receptor"]).copy()
        df["ligand"] = _clean_symbols(df["ligand"])
        df["receptor"] = _clean_symbols(df["receptor"])
        df = df[(df["ligand"] != "") & (df["receptor"] != "")]
        df = df.drop_duplicates(subset=["ligand", "receptor"]).reset_index(drop=True)
        object.__setattr__(self, "table", df)

    def __len__(self) -> int:
        return len(self.table)

    def __iter__(self) -> Iterator[LRRecord]:
        for lig, rec in zip(self.table["ligand"], self.table["receptor"]):
            yield LRRecord(lig, rec)


def load_lr_db(path: Optional[str] = None) -> LRDatabase:
    path = path or DEFAULT_LR_DB
    if not os.path.exists(path):
        raise InputError(f"{path} doesn't exist.")
    return LRDatabase(_read_delim(path))


def add_lr(db: LRDatabase, extra: Union[pd.DataFrame, Sequence[Sequence[str]]]) -> LRDatabase:
    """Merge user ligand-receptor pairs (two columns: ligand, receptor) into ``db``."""
    if not isinstance(extra, pd.DataFrame):
        extra = pd.DataFrame(list(extra))
    if extra.shape[1] != 2:
        raise ConfigError("add_lr expects exactly two columns: ligand, receptor")
    vals = extra.to_numpy()
    if not all(isinstance(v, str) and v.strip() for v in vals.ravel()):
        raise ConfigError("add_lr expects non-empty gene symbols in both columns")
    new = pd.DataFrame({"ligand": vals[:, 0], "receptor": vals[:, 1]})
    if "source" in db.table.columns:
        new["source"] = "user"
    return LRDatabase(pd.concat([db.table, new], ignore_index=True))


def switch_db(table: pd.DataFrame) -> LRDatabase:
    """Replace the LR database wholesale; ``table`` must have exactly ligand and receptor columns."""
    if sorted(map(str, table.columns)) != ["ligand", "receptor"]:
        raise ConfigError("switch_db expects exactly the columns: ligand, receptor")
    if table.empty:
        raise ConfigError("switch_db expects at least one ligand-receptor pair")
    return LRDatabase(table[["ligand", "receptor"]])


@dataclass(frozen=True)
class PathwayDatabase:
    """Pathway-annotated gene-gene relations.

    ``pathway`` holds ";"-delimited pathway names: one edge may belong to
    several pathways.
    """

    table: pd.DataFrame

    def __post_init__(self) -> None:
        df = self.table
        need = {"a_gene", "b_gene", "pathway", "int_type"}
        if not need.issubset(df.columns):
            raise ConfigError("Pathway database must have columns: " + ", ".join(sorted(need)))
        df = df[["a_gene", "b_gene", "pathway", "int_type"]].copy()
        for c in ("a_gene", "b_gene"):
            if df[c].isna().any():
                raise InputError(f"Pathway database has empty {c} symbols")
            df[c] = _clean_symbols(df[c])
            if (df[c] == "").any():
                raise InputError(f"Pathway database has empty {c} symbols")
        df["pathway"] = df["pathway"].fillna("").astype(str)
        df["int_type"] = df["int_type"].fillna("").astype(str)
        object.__setattr__(self, "table", df.reset_index(drop=True))

    def __len__(self) -> int:
        return len(self.table)

    def __iter__(self) -> Iterator[PathwayRecord]:
        for a, b, pw, t in self.table.itertuples(index=False, name=None):
            yield PathwayRecord(a, b, frozenset(_split_tags(pw)), t)

    def tags(self) -> pd.Series:
        """Pathway tag list per edge."""
        return self.table["pathway"].map(_split_tags)

    def occurrences(self) -> pd.Series:
        """Number of database edges tagged with each pathway."""
        counts = self.tags().explode().dropna().value_counts()
        counts.index.name = "pathway"
        return counts

    def restrict(self, patterns: Union[str, Sequence[str]]) -> "PathwayDatabase":
        """Edges with at least one pathway name matching any of ``patterns``."""
        if isinstance(patterns, str):
            patterns = [patterns]
        rx = "|".join(re.escape(p) for p in patterns)
        mask = self.table["pathway"].str.contains(rx, regex=True)
        if not mask.any():
            raise UnknownPathwayError(
                f"{', '.join(patterns)} doesn't correspond to any pathway in database. "
                "Please check your spelling, use find_pathway()."
            )
        return PathwayDatabase(self.table[mask])


def load_pathway_db(path: Optional[str] = None) -> PathwayDatabase:
    path = path or DEFAULT_PATHWAY_DB
    if not os.path.exists(path):
        raise InputError(f"{path} doesn't exist.")
    return PathwayDatabase(_read_delim(path))


def find_pathway(
    db: PathwayDatabase,
    genes: Optional[Sequence[str]] = None,
    pattern: Optional[str] = None,
) -> List[str]:
    """Pathway names that contain all of ``genes`` and/or match ``pattern`` (case-insensitive)."""
    tags = db.tags()
    names = set(tags.explode().dropna())
    if genes:
        for g in genes:
            g = str(g).strip().upper()
            touch = (db.table["a_gene"] == g) | (db.table["b_gene"] == g)
            names &= set(tags[touch].explode().dropna())
    if pattern:
        rx = re.compile(re.escape(pattern), re.IGNORECASE)
        names = {n for n in names if rx.search(n)}
    return sorted(names)


def simplify_interactions(edges: pd.DataFrame) -> pd.DataFrame:
    """Collapse parallel edges (same ordered gene pair) into a single edge.

    Distinct pathway tags are concatenated with ";" and distinct interaction
    types with ",", both in order of first appearance.
    """
    cols = ["a_gene", "b_gene", "pathway", "int_type"]
    if edges.empty:
        return pd.DataFrame(columns=cols)
    out = (
        edges.groupby(["a_gene", "b_gene"], sort=False)
        .agg(
            pathway=("pathway", lambda s: _join_unique(s, ";")),
            int_type=("int_type", lambda s: _join_unique(s, ",")),
        )
        .reset_index()
    )
    return out[cols]
