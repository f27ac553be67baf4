"""Immutable weighted graph over the cells of all samples."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import sparse
from scipy.sparse.csgraph import connected_components

from ..errors import GraphAssemblyError
from .config import MergePolicy

logger = logging.getLogger(__name__)

SYMMETRY_TOLERANCE = 1e-9


def merge_edges(
    rows: np.ndarray,
    cols: np.ndarray,
    weights: np.ndarray,
    policy: MergePolicy = MergePolicy.MAX,
    directed: bool = False,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Collapse duplicate edges with a fixed combination policy.

    Undirected edges are canonicalized to ``u < v`` and self-loops are
    dropped. Edges are sorted by (u, v, weight) before reduction so the
    merged weights do not depend on input order.

    Returns
    -------
    Tuple[np.ndarray, np.ndarray, np.ndarray]
        Unique (u, v, weight) arrays sorted by (u, v)
    """
    rows = np.asarray(rows, dtype=np.int64)
    cols = np.asarray(cols, dtype=np.int64)
    weights = np.asarray(weights, dtype=np.float64)

    keep = rows != cols
    rows, cols, weights = rows[keep], cols[keep], weights[keep]
    if not directed:
        rows, cols = np.minimum(rows, cols), np.maximum(rows, cols)

    if rows.size == 0:
        return rows, cols, weights

    order = np.lexsort((weights, cols, rows))
    rows, cols, weights = rows[order], cols[order], weights[order]

    boundary = np.ones(rows.size, dtype=bool)
    boundary[1:] = (rows[1:] != rows[:-1]) | (cols[1:] != cols[:-1])
    starts = np.flatnonzero(boundary)

    if MergePolicy.parse(policy) == MergePolicy.SUM:
        merged = np.add.reduceat(weights, starts)
    else:
        merged = np.maximum.reduceat(weights, starts)
    return rows[starts], cols[starts], merged


class JointGraph:
    """Weighted cell graph spanning every registered sample.

    Nodes are cells in registry order (then each sample's own cell order).
    The adjacency is symmetric unless ``directed`` is set, which only
    rebalanced graphs are. Instances are never modified after construction;
    operations that change weights return a new graph.

    Parameters
    ----------
    nodes : Sequence[str]
        Cell ids, one per node
    node_samples : Sequence[str]
        Owning sample id of each node
    adjacency : sparse matrix
        n_nodes x n_nodes weights
    directed : bool
        Whether ``adjacency[i, j]`` and ``adjacency[j, i]`` may differ
    metadata : Dict[str, Any], optional
        Build parameters and statistics
    """

    def __init__(
        self,
        nodes: Sequence[str],
        node_samples: Sequence[str],
        adjacency: sparse.spmatrix,
        directed: bool = False,
        metadata: Optional[Dict[str, Any]] = None,
    ):
        nodes = np.array([str(n) for n in nodes], dtype=object)
        node_samples = np.array([str(s) for s in node_samples], dtype=object)
        adjacency = sparse.csr_matrix(adjacency, dtype=np.float64, copy=True)
        if len(nodes) != len(node_samples):
            raise GraphAssemblyError(
                "nodes and node_samples differ in length",
                {"n_nodes": len(nodes), "n_node_samples": len(node_samples)},
            )
        if adjacency.shape != (len(nodes), len(nodes)):
            raise GraphAssemblyError(
                "Adjacency shape does not match node count",
                {"shape": adjacency.shape, "n_nodes": len(nodes)},
            )
        if len(set(nodes)) != len(nodes):
            raise GraphAssemblyError("Node ids are not unique")
        adjacency.sum_duplicates()
        adjacency.sort_indices()
        adjacency.eliminate_zeros()
        if not directed:
            asymmetry = abs(adjacency - adjacency.T)
            if asymmetry.nnz and asymmetry.max() > SYMMETRY_TOLERANCE:
                raise GraphAssemblyError(
                    "Undirected graph has an asymmetric adjacency",
                    {"max_difference": float(asymmetry.max())},
                )

        nodes.setflags(write=False)
        node_samples.setflags(write=False)
        self._nodes = nodes
        self._node_samples = node_samples
        self._adjacency = adjacency
        self._directed = bool(directed)
        self._index = pd.Index(nodes, name="cell_id")
        self.metadata = dict(metadata or {})

    @classmethod
    def from_edges(
        cls,
        nodes: Sequence[str],
        node_samples: Sequence[str],
        rows: np.ndarray,
        cols: np.ndarray,
        weights: np.ndarray,
        policy: MergePolicy = MergePolicy.MAX,
        directed: bool = False,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> "JointGraph":
        """Build a graph from a possibly redundant edge list."""
        n = len(nodes)
        u, v, w = merge_edges(rows, cols, weights, policy=policy, directed=directed)
        if directed:
            adjacency = sparse.csr_matrix((w, (u, v)), shape=(n, n))
        else:
            adjacency = sparse.csr_matrix(
                (np.concatenate([w, w]), (np.concatenate([u, v]), np.concatenate([v, u]))),
                shape=(n, n),
            )
        return cls(nodes, node_samples, adjacency, directed=directed, metadata=metadata)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def nodes(self) -> np.ndarray:
        return self._nodes

    @property
    def node_samples(self) -> np.ndarray:
        return self._node_samples

    @property
    def adjacency(self) -> sparse.csr_matrix:
        """CSR weight matrix. Treat as read-only."""
        return self._adjacency

    @property
    def directed(self) -> bool:
        return self._directed

    @property
    def n_nodes(self) -> int:
        return len(self._nodes)

    @property
    def n_edges(self) -> int:
        """Number of edges (each undirected edge counted once)."""
        if self._directed:
            return int(self._adjacency.nnz)
        return int(sparse.triu(self._adjacency, k=1).nnz)

    def node_index(self) -> pd.Index:
        return self._index

    def positions(self, cell_ids: Sequence[str]) -> np.ndarray:
        """Node positions of the given cell ids (-1 for unknown cells)."""
        return self._index.get_indexer(pd.Index([str(c) for c in cell_ids]))

    def degree(self, weighted: bool = True) -> pd.Series:
        """Out-degree of every node, as total weight or edge count."""
        if weighted:
            values = np.asarray(self._adjacency.sum(axis=1)).ravel()
        else:
            values = np.diff(self._adjacency.indptr)
        return pd.Series(values, index=self._index, name="degree")

    def connected_components(self) -> Tuple[int, np.ndarray]:
        """Weakly connected components.

        Returns
        -------
        Tuple[int, np.ndarray]
            Number of components and the component label of each node
        """
        n_components, labels = connected_components(
            self._adjacency, directed=self._directed, connection="weak"
        )
        return int(n_components), labels

    def symmetrized(self) -> "JointGraph":
        """Undirected version with weights ``(W + W^T) / 2``."""
        if not self._directed:
            return self
        adjacency = (self._adjacency + self._adjacency.T) * 0.5
        return JointGraph(
            self._nodes,
            self._node_samples,
            adjacency,
            directed=False,
            metadata=dict(self.metadata, symmetrized=True),
        )

    def with_adjacency(
        self,
        adjacency: sparse.spmatrix,
        directed: Optional[bool] = None,
        **metadata: Any,
    ) -> "JointGraph":
        """New graph over the same nodes with different weights."""
        return JointGraph(
            self._nodes,
            self._node_samples,
            adjacency,
            directed=self._directed if directed is None else directed,
            metadata=dict(self.metadata, **metadata),
        )

    def edge_table(self) -> pd.DataFrame:
        """Edge list with cell and sample ids.

        Undirected graphs list each edge once with ``source < target`` by
        node position.
        """
        coo = self._adjacency.tocoo()
        mask = np.ones(coo.nnz, dtype=bool) if self._directed else coo.row < coo.col
        rows, cols, data = coo.row[mask], coo.col[mask], coo.data[mask]
        order = np.lexsort((cols, rows))
        rows, cols, data = rows[order], cols[order], data[order]
        source_samples = self._node_samples[rows]
        target_samples = self._node_samples[cols]
        return pd.DataFrame(
            {
                "source": self._nodes[rows],
                "target": self._nodes[cols],
                "weight": data,
                "source_sample": source_samples,
                "target_sample": target_samples,
                "kind": np.where(source_samples == target_samples, "intra", "inter"),
            }
        )

    def node_table(self) -> pd.DataFrame:
        """Node table with sample membership and degree."""
        return pd.DataFrame(
            {
                "sample_id": self._node_samples,
                "degree": self.degree(weighted=False).values,
                "weighted_degree": self.degree(weighted=True).values,
            },
            index=self._index,
        )

    def summary_dict(self) -> Dict[str, Any]:
        """Return summary dictionary for JSON export."""
        n_components, _ = self.connected_components()
        degrees = np.diff(self._adjacency.indptr)
        edges = self.edge_table()
        return {
            "n_nodes": self.n_nodes,
            "n_edges": self.n_edges,
            "n_inter_edges": int((edges["kind"] == "inter").sum()),
            "n_intra_edges": int((edges["kind"] == "intra").sum()),
            "directed": self._directed,
            "n_components": n_components,
            "n_isolated": int((degrees == 0).sum()),
            "mean_degree": float(degrees.mean()) if self.n_nodes else 0.0,
        }

    def __repr__(self) -> str:
        return (
            f"JointGraph(n_nodes={self.n_nodes}, n_edges={self.n_edges}, "
            f"directed={self._directed})"
        )
