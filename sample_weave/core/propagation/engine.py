"""Label propagation over the joint graph.

Two methods are available:

- ``diffusion``: synchronous random-walk smoothing ``P <- D^-1 W P``,
  with seed rows clamped each iteration when ``fixed_initial_labels`` is set.
- ``solver``: harmonic function on every seeded component, solving
  ``(I - P_UU) F_U = P_UL F_L`` with a sparse LU factorization.

Nodes in connected components without any seed receive the uniform
distribution under both methods.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Union

import numpy as np
import pandas as pd
from scipy import sparse
from scipy.sparse.linalg import splu

from ..errors import PropagationError
from ..graph import JointGraph
from .config import PropagationConfig, PropagationMethod, check_solver_clamping


@dataclass
class PropagationResult:
    """Per-cell label distributions.

    Attributes
    ----------
    distributions : pd.DataFrame
        Cell x label probabilities; columns in sorted label order, rows sum to 1
    labeled : pd.Series
        True for cells that carried an initial label
    seeded : pd.Series
        True for cells whose connected component contains a labeled cell
    method : str
        diffusion or solver
    n_iterations : int
        Diffusion iterations run (0 for the solver)
    converged : bool
        Whether the change criterion was met
    max_change : float
        Largest absolute change of any single (cell, label) entry in the
        final iteration
    n_dropped : int
        Input labels ignored because their cell is not in the graph
    """

    distributions: pd.DataFrame
    labeled: pd.Series
    seeded: pd.Series
    method: str = PropagationMethod.DIFFUSION.value
    n_iterations: int = 0
    converged: bool = True
    max_change: float = 0.0
    n_dropped: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def labels(self) -> List[str]:
        return list(self.distributions.columns)

    @property
    def hard_labels(self) -> pd.Series:
        """Most probable label per cell (ties go to the first label in sorted order)."""
        values = self.distributions.to_numpy()
        best = np.argmax(values, axis=1)
        return pd.Series(
            np.asarray(self.labels, dtype=object)[best],
            index=self.distributions.index,
            name="label",
        )

    @property
    def uncertainty(self) -> pd.Series:
        """One minus the largest label probability."""
        return (1.0 - self.distributions.max(axis=1)).rename("uncertainty")

    def to_frame(self) -> pd.DataFrame:
        """Distributions with hard label, uncertainty and seed flags."""
        df = self.distributions.copy()
        df["label"] = self.hard_labels
        df["uncertainty"] = self.uncertainty
        df["labeled"] = self.labeled
        df["seeded"] = self.seeded
        return df

    def summary_dict(self) -> Dict[str, Any]:
        """Return summary dictionary for JSON export."""
        return {
            "method": self.method,
            "n_cells": int(len(self.distributions)),
            "n_labels": len(self.labels),
            "labels": self.labels,
            "n_labeled": int(self.labeled.sum()),
            "n_seeded": int(self.seeded.sum()),
            "n_iterations": self.n_iterations,
            "converged": self.converged,
            "max_change": float(self.max_change),
            "n_dropped": self.n_dropped,
            "label_counts": self.hard_labels[self.seeded].value_counts().to_dict(),
            "mean_uncertainty": float(self.uncertainty.mean()),
        }


def _transition_rows(adjacency: sparse.csr_matrix):
    degree = np.asarray(adjacency.sum(axis=1)).ravel()
    inv = np.zeros_like(degree)
    np.divide(1.0, degree, out=inv, where=degree > 0)
    return degree, inv


class LabelPropagationEngine:
    """Propagates a partial cell labeling over a JointGraph.

    Parameters
    ----------
    config : PropagationConfig, optional
        Propagation configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> engine = LabelPropagationEngine(PropagationConfig(max_iterations=50))
    >>> result = engine.propagate(graph, {"A_0": "T cells", "B_3": "B cells"})
    >>> result.hard_labels.value_counts()
    """

    def __init__(
        self,
        config: Optional[PropagationConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or PropagationConfig()
        self.logger = logger or logging.getLogger(__name__)

    def _seed_positions(self, graph: JointGraph, labels: Union[pd.Series, Mapping[str, str]]):
        labels = pd.Series(labels, dtype=object) if not isinstance(labels, pd.Series) else labels
        labels = labels.dropna()
        labels.index = labels.index.astype(str)
        labels = labels.astype(str)
        labels = labels[~labels.index.duplicated(keep="last")]

        positions = graph.positions(labels.index)
        unknown = positions < 0
        n_dropped = int(unknown.sum())
        if n_dropped:
            self.logger.warning(
                "Dropping %d labels on cells not in the graph (e.g. %s)",
                n_dropped,
                ", ".join(labels.index[unknown][:3]),
            )
        return positions[~unknown], labels.to_numpy()[~unknown], n_dropped

    def propagate(
        self,
        graph: JointGraph,
        labels: Union[pd.Series, Mapping[str, str]],
        method: Optional[Union[str, PropagationMethod]] = None,
    ) -> PropagationResult:
        """Propagate labels to every cell of the graph.

        Parameters
        ----------
        graph : JointGraph
            Graph to propagate over (directed graphs use out-edge weights)
        labels : pd.Series or Mapping
            Cell id -> label class for the seed cells
        method : str, optional
            Override of ``config.method``

        Returns
        -------
        PropagationResult

        Raises
        ------
        InputError
            If the solver is requested without clamped seeds
        PropagationError
            If the graph is empty or no label lands on a graph node
        """
        start = time.time()
        method = PropagationMethod.parse(method or self.config.method)
        check_solver_clamping(method, self.config.fixed_initial_labels)
        if graph.n_nodes == 0:
            raise PropagationError("Cannot propagate labels on an empty graph")

        positions, values, n_dropped = self._seed_positions(graph, labels)
        if len(positions) == 0:
            raise PropagationError(
                "No labeled cells in the graph", {"n_dropped": n_dropped}
            )

        classes = sorted(set(values))
        class_index = {label: i for i, label in enumerate(classes)}
        seeds = np.zeros((len(positions), len(classes)))
        seeds[np.arange(len(positions)), [class_index[v] for v in values]] = 1.0

        _, components = graph.connected_components()
        seeded = np.isin(components, np.unique(components[positions]))
        labeled = np.zeros(graph.n_nodes, dtype=bool)
        labeled[positions] = True

        if method == PropagationMethod.SOLVER:
            probs = self._solve(graph, positions, seeds, seeded)
            n_iter, converged, change = 0, True, 0.0
        else:
            probs, n_iter, converged, change = self._diffuse(graph, positions, seeds)

        uniform = 1.0 / len(classes)
        probs[~seeded] = uniform
        totals = probs.sum(axis=1, keepdims=True)
        empty = totals.ravel() <= 0
        probs[empty] = uniform
        totals[empty] = 1.0
        probs = np.clip(probs / totals, 0.0, 1.0)

        index = graph.node_index()
        result = PropagationResult(
            distributions=pd.DataFrame(probs, index=index, columns=classes),
            labeled=pd.Series(labeled, index=index, name="labeled"),
            seeded=pd.Series(seeded, index=index, name="seeded"),
            method=method.value,
            n_iterations=n_iter,
            converged=converged,
            max_change=change,
            n_dropped=n_dropped,
            metadata={"fixed_initial_labels": self.config.fixed_initial_labels},
        )

        log = self.logger.info if converged else self.logger.warning
        log(
            "Propagated %d labels from %d seeds over %d nodes (%s, %d iterations, "
            "converged=%s, %.2fs)",
            len(classes),
            len(positions),
            graph.n_nodes,
            method.value,
            n_iter,
            converged,
            time.time() - start,
        )
        return result

    def _diffuse(self, graph: JointGraph, positions: np.ndarray, seeds: np.ndarray):
        adjacency = graph.adjacency
        degree, inv_degree = _transition_rows(adjacency)
        isolated = degree <= 0
        n_classes = seeds.shape[1]

        current = np.full((graph.n_nodes, n_classes), 1.0 / n_classes)
        current[positions] = seeds

        converged = False
        change = np.inf
        n_iter = 0
        for n_iter in range(1, self.config.max_iterations + 1):
            updated = inv_degree[:, None] * (adjacency @ current)
            updated[isolated] = current[isolated]
            if self.config.fixed_initial_labels:
                updated[positions] = seeds
            change = float(np.abs(updated - current).max())
            current = updated
            if change < self.config.tolerance:
                converged = True
                break
        return current, n_iter, converged, change

    def _solve(
        self,
        graph: JointGraph,
        positions: np.ndarray,
        seeds: np.ndarray,
        seeded: np.ndarray,
    ) -> np.ndarray:
        adjacency = graph.adjacency
        _, inv_degree = _transition_rows(adjacency)
        transition = sparse.diags(inv_degree) @ adjacency

        is_seed = np.zeros(graph.n_nodes, dtype=bool)
        is_seed[positions] = True
        unlabeled = np.flatnonzero(seeded & ~is_seed)

        probs = np.zeros((graph.n_nodes, seeds.shape[1]))
        probs[positions] = seeds
        if len(unlabeled) == 0:
            return probs

        transition = transition.tocsr()
        p_uu = transition[unlabeled][:, unlabeled]
        p_ul = transition[unlabeled][:, positions]
        system = (sparse.identity(len(unlabeled), format="csc") - p_uu).tocsc()
        rhs = np.asarray(p_ul @ seeds)
        try:
            solution = splu(system).solve(rhs)
        except RuntimeError as exc:
            raise PropagationError(
                f"Harmonic system is singular: {exc}",
                {"n_unlabeled": len(unlabeled), "n_seeds": len(positions)},
            ) from exc
        probs[unlabeled] = np.clip(solution, 0.0, None)
        return probs
