"""Pluggable community detection and graph layout.

Any callable taking a :class:`JointGraph` and returning a cell id -> community
Series satisfies :class:`CommunityDetector`; any callable returning a cell id
x coordinate DataFrame satisfies :class:`LayoutFunction`. The scanpy-backed
defaults are :class:`LeidenDetector` and :class:`ForceDirectedLayout`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol, runtime_checkable

import numpy as np
import pandas as pd

from ..errors import GraphAssemblyError
from .joint_graph import JointGraph

logger = logging.getLogger(__name__)


@runtime_checkable
class CommunityDetector(Protocol):
    """Partition the nodes of a joint graph."""

    def __call__(self, graph: JointGraph) -> pd.Series:
        ...


@runtime_checkable
class LayoutFunction(Protocol):
    """Place the nodes of a joint graph in a low-dimensional space."""

    def __call__(self, graph: JointGraph, **params: Any) -> pd.DataFrame:
        ...


def _graph_adata(graph: JointGraph):
    import anndata as ad

    obs = pd.DataFrame({"sample_id": graph.node_samples}, index=graph.node_index())
    return ad.AnnData(obs=obs)


@dataclass
class LeidenDetector:
    """Leiden communities via scanpy on the graph adjacency.

    Directed (rebalanced) graphs are symmetrized first.

    Attributes
    ----------
    resolution : float
        Leiden resolution parameter
    random_seed : int
        Random seed
    n_iterations : int
        Leiden iterations (negative runs to convergence)
    """

    resolution: float = 1.0
    random_seed: int = 1337
    n_iterations: int = 2

    def __call__(self, graph: JointGraph) -> pd.Series:
        import scanpy as sc

        undirected = graph.symmetrized()
        adata = _graph_adata(undirected)
        sc.tl.leiden(
            adata,
            resolution=self.resolution,
            random_state=self.random_seed,
            adjacency=undirected.adjacency,
            key_added="community",
            flavor="igraph",
            n_iterations=self.n_iterations,
            directed=False,
        )
        return adata.obs["community"].astype(str).rename("community")


@dataclass
class ForceDirectedLayout:
    """Fruchterman-Reingold (or other igraph) layout via scanpy ``tl.draw_graph``."""

    layout: str = "fr"
    random_seed: int = 1337

    def __call__(self, graph: JointGraph, **params: Any) -> pd.DataFrame:
        import scanpy as sc

        undirected = graph.symmetrized()
        adata = _graph_adata(undirected)
        layout = params.pop("layout", self.layout)
        sc.tl.draw_graph(
            adata,
            layout=layout,
            random_state=params.pop("random_state", self.random_seed),
            adjacency=undirected.adjacency,
            key_added_ext="weave",
            **params,
        )
        coords = np.asarray(adata.obsm["X_draw_graph_weave"])
        columns = [f"dim{i + 1}" for i in range(coords.shape[1])]
        return pd.DataFrame(coords, index=graph.node_index(), columns=columns)


def detect_communities(
    graph: JointGraph,
    detector: Optional[CommunityDetector] = None,
) -> pd.Series:
    """Run a community detector and check that every node is assigned.

    Raises
    ------
    GraphAssemblyError
        If the detector leaves nodes unassigned
    """
    detector = detector or LeidenDetector()
    communities = pd.Series(detector(graph))
    communities.index = communities.index.astype(str)
    communities = communities.reindex(graph.node_index())
    missing = communities.isna()
    if missing.any():
        raise GraphAssemblyError(
            f"Community detector left {int(missing.sum())} nodes unassigned",
            {"detector": type(detector).__name__, "examples": list(communities.index[missing][:5])},
        )
    communities = communities.astype(str).rename("community")
    logger.info(
        "Detected %d communities over %d nodes", communities.nunique(), len(communities)
    )
    return communities


def embed_graph(
    graph: JointGraph,
    layout: Optional[LayoutFunction] = None,
    **params: Any,
) -> pd.DataFrame:
    """Run a layout function and check that every node is placed.

    Raises
    ------
    GraphAssemblyError
        If the layout leaves nodes without finite coordinates
    """
    layout = layout or ForceDirectedLayout()
    coords = pd.DataFrame(layout(graph, **params))
    coords.index = coords.index.astype(str)
    coords = coords.reindex(graph.node_index())
    unplaced = ~np.isfinite(coords.to_numpy(dtype=np.float64)).all(axis=1)
    if unplaced.any():
        raise GraphAssemblyError(
            f"Layout left {int(unplaced.sum())} nodes unplaced",
            {"layout": type(layout).__name__},
        )
    return coords
