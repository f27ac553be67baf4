"""Table I/O: label tables in, graph and result tables out."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, Optional, Union

import numpy as np
import pandas as pd
from scipy import sparse

from ..core.errors import InputError
from ..core.graph import JointGraph

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def ensure_output_dir(path: PathLike) -> Path:
    """Create the directory at path if it does not exist and return it."""
    directory = Path(path)
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def _separator(path: Path) -> str:
    return "\t" if path.suffix.lower() in (".tsv", ".tab", ".txt") else ","


def write_dataframe(df: pd.DataFrame, path: PathLike, *, index: bool = False) -> Path:
    """Write a DataFrame as CSV (or TSV for .tsv/.txt), creating parent dirs."""
    output_path = Path(path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(output_path, index=index, sep=_separator(output_path))
    return output_path


def read_label_table(
    path: PathLike,
    cell_column: str = "cell_id",
    label_column: str = "label",
) -> pd.Series:
    """Read a cell id -> label table (CSV or TSV).

    Raises
    ------
    InputError
        If the file or either column is missing
    """
    path = Path(path)
    if not path.exists():
        raise InputError(f"Label table not found: {path}")
    df = pd.read_csv(path, sep=_separator(path), dtype=str)
    missing = [c for c in (cell_column, label_column) if c not in df.columns]
    if missing:
        raise InputError(
            "Label table is missing columns",
            {"path": str(path), "missing": missing, "columns": list(df.columns)},
        )
    df = df.dropna(subset=[cell_column, label_column])
    return pd.Series(df[label_column].to_numpy(), index=df[cell_column].to_numpy(), name=label_column)


def write_graph(graph: JointGraph, out_dir: PathLike, prefix: str = "joint_graph") -> Dict[str, Path]:
    """Write a joint graph as edge list, node table, CSR ``.npz`` and a JSON header.

    The header records whether the graph is directed so rebalanced graphs
    read back with their orientation.

    Returns
    -------
    Dict[str, Path]
        Paths of the written ``edges``, ``nodes``, ``adjacency`` and ``info`` files
    """
    out_dir = ensure_output_dir(out_dir)
    edges_path = write_dataframe(graph.edge_table(), out_dir / f"{prefix}_edges.csv")
    nodes_path = write_dataframe(graph.node_table(), out_dir / f"{prefix}_nodes.csv", index=True)
    adjacency_path = out_dir / f"{prefix}_adjacency.npz"
    sparse.save_npz(adjacency_path, graph.adjacency)
    info_path = out_dir / f"{prefix}_info.json"
    with open(info_path, "w") as f:
        json.dump(
            {"directed": graph.directed, "n_nodes": graph.n_nodes, "n_edges": graph.n_edges},
            f,
            indent=2,
        )
    logger.info("Wrote joint graph (%d nodes, %d edges) to %s", graph.n_nodes, graph.n_edges, out_dir)
    return {"edges": edges_path, "nodes": nodes_path, "adjacency": adjacency_path, "info": info_path}


def read_graph(
    out_dir: PathLike,
    prefix: str = "joint_graph",
    directed: Optional[bool] = None,
) -> JointGraph:
    """Load a graph written by :func:`write_graph`.

    ``directed`` defaults to the value stored in the graph header; graphs
    without a header are read as undirected.
    """
    out_dir = Path(out_dir)
    nodes_path = out_dir / f"{prefix}_nodes.csv"
    adjacency_path = out_dir / f"{prefix}_adjacency.npz"
    info_path = out_dir / f"{prefix}_info.json"
    for path in (nodes_path, adjacency_path):
        if not path.exists():
            raise InputError(f"Graph file not found: {path}")
    if directed is None:
        directed = False
        if info_path.exists():
            with open(info_path) as f:
                directed = bool(json.load(f).get("directed", False))
    nodes = pd.read_csv(nodes_path, dtype={"cell_id": str, "sample_id": str})
    adjacency = sparse.load_npz(adjacency_path)
    return JointGraph(
        nodes["cell_id"].to_numpy(),
        nodes["sample_id"].to_numpy(),
        adjacency,
        directed=directed,
    )


def write_label_table(result_frame: pd.DataFrame, path: PathLike) -> Path:
    """Write a propagation result frame with the cell id as first column."""
    df = result_frame.copy()
    df.index.name = "cell_id"
    numeric = df.select_dtypes(include=[np.floating]).columns
    df[numeric] = df[numeric].round(6)
    return write_dataframe(df, path, index=True)
