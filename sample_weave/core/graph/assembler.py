"""Joint graph assembly from per-pair matches and intra-sample neighbors."""

from __future__ import annotations

import logging
import time
from typing import Dict, Iterable, List, Optional, Union

import numpy as np

from ..alignment import DistanceMetric
from ..errors import GraphAssemblyError
from ..matching import MatchingConfig, PairMatches, distance_to_weight, median_nonzero, self_knn
from ..registry import Sample, SampleRegistry
from .config import GraphConfig
from .joint_graph import JointGraph


def sample_self_embedding(
    sample: Sample,
    n_comps: int = 30,
    n_odgenes: int = 2000,
    random_seed: int = 1337,
) -> np.ndarray:
    """Coordinates used for a sample's own neighbor graph.

    Uses the supplied embedding when present; otherwise a PCA of log1p
    expression over the sample's top over-dispersed genes.
    """
    if sample.embedding is not None:
        return np.asarray(sample.embedding, dtype=np.float64)

    import scanpy as sc

    genes = sample.ranked_genes(n_odgenes)
    x = np.log1p(sample.expression(genes))
    use_comps = min(n_comps, x.shape[1] - 1, x.shape[0] - 1)
    if use_comps < 1:
        return x
    return np.asarray(
        sc.pp.pca(
            x,
            n_comps=use_comps,
            zero_center=True,
            svd_solver="arpack",
            random_state=random_seed,
            dtype="float64",
        ),
        dtype=np.float64,
    )


class GraphAssembler:
    """Combines intra-sample kNN edges and inter-sample matches.

    Parameters
    ----------
    config : GraphConfig, optional
        Assembly configuration. If None, uses defaults.
    matching_config : MatchingConfig, optional
        Neighbor search settings reused for intra-sample neighbors
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> assembler = GraphAssembler(GraphConfig(k_self=10, merge_policy="max"))
    >>> graph = assembler.assemble(registry, [matches_ab, matches_ac])
    >>> graph.n_nodes == registry.n_cells
    True
    """

    def __init__(
        self,
        config: Optional[GraphConfig] = None,
        matching_config: Optional[MatchingConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or GraphConfig()
        self.matching_config = matching_config or MatchingConfig()
        self.logger = logger or logging.getLogger(__name__)

    def intra_edges(
        self,
        sample: Sample,
        metric: DistanceMetric = DistanceMetric.ANGULAR,
    ):
        """Weighted k_self-nearest-neighbor edges inside one sample (local indices)."""
        k = min(self.config.k_self, sample.n_cells - 1)
        empty = (np.zeros(0, dtype=np.int64), np.zeros(0, dtype=np.int64), np.zeros(0))
        if k <= 0 or self.config.k_self_weight == 0:
            return empty

        coords = sample_self_embedding(
            sample,
            n_comps=self.config.self_ncomps,
            n_odgenes=self.config.self_n_odgenes,
            random_seed=self.matching_config.random_seed,
        )
        knn = self_knn(coords, k, metric, config=self.matching_config)
        rows = np.repeat(np.arange(sample.n_cells), knn.k)
        cols = knn.indices.ravel()
        dists = knn.distances.ravel()
        valid = cols >= 0
        rows, cols, dists = rows[valid], cols[valid], dists[valid]

        sigma = median_nonzero(dists) if metric == DistanceMetric.L2 else None
        weights = distance_to_weight(dists, metric, sigma) * self.config.k_self_weight
        keep = weights > 0
        return rows[keep], cols[keep], weights[keep]

    def _factor_levels(self, registry: SampleRegistry) -> Dict[str, object]:
        key = self.config.sample_factor
        if key is None:
            return {}
        return {s.sample_id: s.metadata.get(key) for s in registry}

    def assemble(
        self,
        registry: SampleRegistry,
        matches: Iterable[PairMatches],
        metric: Union[str, DistanceMetric] = DistanceMetric.ANGULAR,
    ) -> JointGraph:
        """Assemble the joint graph.

        Parameters
        ----------
        registry : SampleRegistry
            All samples; every cell becomes a node
        matches : Iterable[PairMatches]
            Inter-sample matches of every successfully aligned pair
        metric : str or DistanceMetric
            Metric for intra-sample neighbors

        Returns
        -------
        JointGraph

        Raises
        ------
        GraphAssemblyError
            If the registry is empty or no edge survives
        """
        start = time.time()
        metric = DistanceMetric.parse(metric)
        if len(registry) == 0:
            raise GraphAssemblyError("Cannot assemble a graph without samples")

        offsets = registry.offsets()
        nodes: List[np.ndarray] = []
        node_samples: List[np.ndarray] = []
        rows: List[np.ndarray] = []
        cols: List[np.ndarray] = []
        weights: List[np.ndarray] = []

        n_intra = 0
        for sample in registry:
            nodes.append(np.asarray(sample.cell_ids, dtype=object))
            node_samples.append(np.full(sample.n_cells, sample.sample_id, dtype=object))
            r, c, w = self.intra_edges(sample, metric)
            offset = offsets[sample.sample_id]
            rows.append(r + offset)
            cols.append(c + offset)
            weights.append(w)
            n_intra += len(w)

        levels = self._factor_levels(registry)
        downweight = self.config.same_factor_downweight
        n_inter = 0
        n_pairs = 0
        for pair in matches:
            for sample_id in (pair.sample_a, pair.sample_b):
                if sample_id not in registry:
                    raise GraphAssemblyError(
                        f"Matches reference unknown sample '{sample_id}'"
                    )
            w = np.asarray(pair.weights, dtype=np.float64)
            level_a, level_b = levels.get(pair.sample_a), levels.get(pair.sample_b)
            if downweight != 1.0 and level_a is not None and level_a == level_b:
                w = w * downweight
            rows.append(np.asarray(pair.cells_a, dtype=np.int64) + offsets[pair.sample_a])
            cols.append(np.asarray(pair.cells_b, dtype=np.int64) + offsets[pair.sample_b])
            weights.append(w)
            n_inter += len(w)
            n_pairs += 1

        all_weights = np.concatenate(weights) if weights else np.zeros(0)
        if all_weights.size == 0:
            raise GraphAssemblyError(
                "Joint graph has no edges",
                {"n_samples": len(registry), "n_pairs": n_pairs},
            )

        graph = JointGraph.from_edges(
            nodes=np.concatenate(nodes),
            node_samples=np.concatenate(node_samples),
            rows=np.concatenate(rows),
            cols=np.concatenate(cols),
            weights=all_weights,
            policy=self.config.policy,
            metadata={
                "merge_policy": self.config.merge_policy,
                "k_self": self.config.k_self,
                "k_self_weight": self.config.k_self_weight,
                "n_pairs": n_pairs,
            },
        )
        if graph.n_edges == 0:
            raise GraphAssemblyError(
                "Joint graph has no edges after merging",
                {"n_samples": len(registry), "n_pairs": n_pairs},
            )

        self.logger.info(
            "Assembled joint graph: %d nodes, %d edges (%d intra, %d inter candidates "
            "from %d pairs) in %.2fs",
            graph.n_nodes,
            graph.n_edges,
            n_intra,
            n_inter,
            n_pairs,
            time.time() - start,
        )
        return graph
