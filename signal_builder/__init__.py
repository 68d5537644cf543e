__all__ = [
    "InputError",
    "ConfigError",
    "UnknownPathwayError",
    "ExpressionMatrix",
    "ClusterAssignment",
    "prepare",
    "reduce_to_most_variable",
    "add_clustering",
    "LRDatabase",
    "PathwayDatabase",
    "load_lr_db",
    "load_pathway_db",
    "add_lr",
    "switch_db",
    "find_pathway",
    "InteractionTable",
    "cell_signaling",
    "IntracellularNetwork",
    "intra_network",
    "dge",
]

from .core import ConfigError, InputError, UnknownPathwayError  # noqa: E402
from .core import ClusterAssignment, ExpressionMatrix, add_clustering, prepare, reduce_to_most_variable
from .databases import LRDatabase, PathwayDatabase, add_lr, find_pathway, load_lr_db, load_pathway_db, switch_db
from .dge import dge
from .network import IntracellularNetwork, intra_network
from .signaling import InteractionTable, cell_signaling

__version__ = "0.1.0"
