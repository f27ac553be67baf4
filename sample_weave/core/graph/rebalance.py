"""Factor rebalancing of joint graph edge weights."""

from __future__ import annotations

import logging
from typing import Mapping, Union

import numpy as np
import pandas as pd
from scipy import sparse

from ..errors import InputError
from .joint_graph import JointGraph

logger = logging.getLogger(__name__)


def _factor_codes(graph: JointGraph, factor: Union[pd.Series, Mapping[str, object]]) -> np.ndarray:
    if not isinstance(factor, pd.Series):
        factor = pd.Series(dict(factor))
    factor = factor.copy()
    factor.index = factor.index.astype(str)

    missing = graph.node_index().difference(factor.index)
    if len(missing) > 0:
        raise InputError(
            f"Factor is missing {len(missing)} cells",
            {"examples": list(missing[:5])},
        )
    values = factor.reindex(graph.node_index())
    if values.isna().any():
        raise InputError(
            "Factor has missing values",
            {"examples": list(values.index[values.isna()][:5])},
        )
    return pd.Categorical(values.astype(str)).codes.astype(np.int64)


def rebalance(
    graph: JointGraph,
    factor: Union[pd.Series, Mapping[str, object]],
    strength: float,
) -> JointGraph:
    """Reweight edges so neighbor mass per factor level moves toward uniform.

    For every node with neighbor-level masses ``m_l`` over the L levels
    present among its neighbors (total T), the new mass of level l is
    ``(1 - s) * m_l + s * T / L`` and every edge to a level-l neighbor is
    scaled by ``m'_l / m_l``. Edges are never created or removed and the
    total outgoing weight of each node is preserved. The result is directed.

    Parameters
    ----------
    graph : JointGraph
        Graph to rebalance
    factor : pd.Series or Mapping
        Level of every cell, indexed by cell id
    strength : float
        Alignment strength s in [0, 1]; 0 returns ``graph`` unchanged

    Returns
    -------
    JointGraph

    Raises
    ------
    InputError
        If strength is outside [0, 1] or the factor misses cells
    """
    if not np.isfinite(strength) or not 0.0 <= strength <= 1.0:
        raise InputError("alignment_strength must be in [0, 1]", {"strength": strength})
    codes = _factor_codes(graph, factor)
    if strength == 0.0:
        return graph

    adjacency = graph.adjacency.tocsr()
    n = graph.n_nodes
    n_levels = int(codes.max()) + 1 if n else 0
    rows = np.repeat(np.arange(n), np.diff(adjacency.indptr))
    levels = codes[adjacency.indices]
    data = adjacency.data

    mass = np.zeros((n, n_levels))
    np.add.at(mass, (rows, levels), data)
    present = mass > 0
    total = mass.sum(axis=1)
    n_present = np.maximum(present.sum(axis=1), 1)

    target = (1.0 - strength) * mass + strength * (total / n_present)[:, None]
    target = np.where(present, target, 0.0)
    ratio = np.divide(target, mass, out=np.ones_like(mass), where=present)

    new_data = data * ratio[rows, levels]
    rebalanced = sparse.csr_matrix(
        (new_data, adjacency.indices.copy(), adjacency.indptr.copy()), shape=adjacency.shape
    )

    logger.info(
        "Rebalanced %d nodes over %d factor levels (strength=%.2f)", n, n_levels, strength
    )
    return graph.with_adjacency(
        rebalanced,
        directed=True,
        alignment_strength=float(strength),
        n_balance_levels=n_levels,
    )


def level_shares(graph: JointGraph, factor: Union[pd.Series, Mapping[str, object]]) -> pd.DataFrame:
    """Share of each node's outgoing weight going to each factor level."""
    codes = _factor_codes(graph, factor)
    if not isinstance(factor, pd.Series):
        factor = pd.Series(dict(factor))
    factor = factor.copy()
    factor.index = factor.index.astype(str)
    categories = pd.Categorical(factor.reindex(graph.node_index()).astype(str)).categories

    adjacency = graph.adjacency
    rows = np.repeat(np.arange(graph.n_nodes), np.diff(adjacency.indptr))
    mass = np.zeros((graph.n_nodes, len(categories)))
    np.add.at(mass, (rows, codes[adjacency.indices]), adjacency.data)
    total = mass.sum(axis=1, keepdims=True)
    shares = np.divide(mass, total, out=np.zeros_like(mass), where=total > 0)
    return pd.DataFrame(shares, index=graph.node_index(), columns=list(categories))
