"""Explicit agglomerative merge trees over communities."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd
from scipy import sparse
from scipy.cluster.hierarchy import linkage
from scipy.spatial.distance import squareform

from ..errors import InputError
from .joint_graph import JointGraph

logger = logging.getLogger(__name__)


@dataclass
class MergeTree:
    """Binary merge tree with heights.

    Leaves are numbered 0..n-1; the node created by merge i is n + i.

    Attributes
    ----------
    merges : np.ndarray
        (n - 1) x 2 array of merged node ids
    heights : np.ndarray
        Height of each merge, non-decreasing
    labels : List[str]
        Leaf labels
    """

    merges: np.ndarray
    heights: np.ndarray
    labels: List[str] = field(default_factory=list)

    def __post_init__(self):
        self.merges = np.asarray(self.merges, dtype=np.int64).reshape(-1, 2)
        self.heights = np.asarray(self.heights, dtype=np.float64).ravel()
        if len(self.merges) != len(self.heights):
            raise InputError(
                "merges and heights differ in length",
                {"n_merges": len(self.merges), "n_heights": len(self.heights)},
            )
        self.labels = [str(label) for label in self.labels] or [
            str(i) for i in range(len(self.merges) + 1)
        ]
        if len(self.labels) != len(self.merges) + 1:
            raise InputError(
                "A tree over n leaves needs n - 1 merges",
                {"n_leaves": len(self.labels), "n_merges": len(self.merges)},
            )

    @classmethod
    def from_linkage(cls, Z: np.ndarray, labels: Optional[Sequence[str]] = None) -> "MergeTree":
        """Build from a scipy linkage matrix."""
        Z = np.asarray(Z, dtype=np.float64)
        return cls(merges=Z[:, :2].astype(np.int64), heights=Z[:, 2], labels=list(labels or []))

    @property
    def n_leaves(self) -> int:
        return len(self.labels)

    def to_linkage(self) -> np.ndarray:
        """scipy linkage matrix (with cluster sizes in the 4th column)."""
        n = self.n_leaves
        sizes = np.ones(n + len(self.merges))
        Z = np.zeros((len(self.merges), 4))
        for i, (left, right) in enumerate(self.merges):
            sizes[n + i] = sizes[left] + sizes[right]
            Z[i] = [left, right, self.heights[i], sizes[n + i]]
        return Z

    def _replay(self, n_merges: int) -> pd.Series:
        n = self.n_leaves
        parent = list(range(n + len(self.merges)))

        def find(x: int) -> int:
            while parent[x] != x:
                parent[x] = parent[parent[x]]
                x = parent[x]
            return x

        for i in range(n_merges):
            left, right = self.merges[i]
            parent[find(left)] = n + i
            parent[find(right)] = n + i

        roots = [find(leaf) for leaf in range(n)]
        # number clusters by their first leaf
        numbering = {}
        for root in roots:
            numbering.setdefault(root, len(numbering))
        return pd.Series([numbering[r] for r in roots], index=self.labels, name="cluster")

    def cut(self, n_clusters: int) -> pd.Series:
        """Assign leaves to ``n_clusters`` clusters by undoing the top merges."""
        if not 1 <= n_clusters <= self.n_leaves:
            raise InputError(
                "n_clusters must be between 1 and the number of leaves",
                {"n_clusters": n_clusters, "n_leaves": self.n_leaves},
            )
        if np.any(np.diff(self.heights) < 0):
            raise InputError("Merge heights must be non-decreasing to cut by count")
        return self._replay(self.n_leaves - n_clusters)

    def cut_height(self, height: float) -> pd.Series:
        """Assign leaves to clusters formed by merges at or below ``height``."""
        n_merges = int(np.searchsorted(self.heights, height, side="right"))
        return self._replay(n_merges)

    def summary_dict(self):
        """Return summary dictionary for JSON export."""
        return {
            "n_leaves": self.n_leaves,
            "labels": self.labels,
            "merges": self.merges.tolist(),
            "heights": self.heights.round(6).tolist(),
        }


def community_connectivity(graph: JointGraph, partition: pd.Series) -> pd.DataFrame:
    """Mean edge weight between every pair of communities.

    Returns
    -------
    pd.DataFrame
        Symmetric community x community matrix of total inter-community weight
        divided by the product of community sizes
    """
    partition = pd.Series(partition).copy()
    partition.index = partition.index.astype(str)
    assigned = partition.reindex(graph.node_index())
    if assigned.isna().any():
        raise InputError(
            "Partition does not cover every node",
            {"n_missing": int(assigned.isna().sum())},
        )
    categorical = pd.Categorical(assigned.astype(str))
    codes = categorical.codes
    n_comm = len(categorical.categories)

    membership = sparse.csr_matrix(
        (np.ones(graph.n_nodes), (np.arange(graph.n_nodes), codes)),
        shape=(graph.n_nodes, n_comm),
    )
    adjacency = graph.symmetrized().adjacency
    totals = np.asarray((membership.T @ adjacency @ membership).todense())
    sizes = np.bincount(codes, minlength=n_comm).astype(np.float64)
    connectivity = totals / np.outer(sizes, sizes)
    categories = [str(c) for c in categorical.categories]
    return pd.DataFrame(connectivity, index=categories, columns=categories)


def community_merge_tree(graph: JointGraph, partition: pd.Series) -> MergeTree:
    """Average-linkage merge tree of communities from their connectivity.

    Distance between communities is ``1 - c / c_max`` where c is their mean
    inter-community edge weight and c_max the largest such value.
    """
    connectivity = community_connectivity(graph, partition)
    labels = list(connectivity.index)
    if len(labels) < 2:
        return MergeTree(merges=np.zeros((0, 2)), heights=np.zeros(0), labels=labels)

    values = connectivity.to_numpy().copy()
    np.fill_diagonal(values, 0.0)
    c_max = values.max()
    distances = 1.0 - values / c_max if c_max > 0 else np.ones_like(values)
    np.fill_diagonal(distances, 0.0)

    Z = linkage(squareform(distances, checks=False), method="average")
    tree = MergeTree.from_linkage(Z, labels=labels)
    logger.info("Built merge tree over %d communities", len(labels))
    return tree
