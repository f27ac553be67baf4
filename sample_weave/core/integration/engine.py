"""Session orchestrator for joint graph integration.

Owns the pairwise result cache for one session, dispatches sample pairs over
a thread pool, assembles (and optionally rebalances) the joint graph, and
fronts propagation, community detection, layout and meta-cell aggregation.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import pandas as pd

from ...config import WeaveConfig
from ..aggregation import cluster_count_matrices
from ..alignment import CancelToken, PairAlignment, PairwiseAligner, PairwiseResultCache
from ..errors import AlignmentError, GraphAssemblyError, InputError, MatchingError
from ..graph import (
    CommunityDetector,
    GraphAssembler,
    JointGraph,
    LayoutFunction,
    MergeTree,
    community_merge_tree,
    detect_communities,
    embed_graph,
    rebalance,
)
from ..matching import MutualNeighborMatcher, PairMatches
from ..propagation import LabelPropagationEngine, PropagationResult
from ..registry import SampleRegistry

Pair = Tuple[str, str]


@dataclass
class PairFailure:
    """A sample pair that could not be aligned or matched."""

    sample_a: str
    sample_b: str
    stage: str
    error_type: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "sample_a": self.sample_a,
            "sample_b": self.sample_b,
            "stage": self.stage,
            "error_type": self.error_type,
            "message": self.message,
        }


@dataclass
class AlignmentReport:
    """Outcome of aligning and matching a set of sample pairs.

    Attributes
    ----------
    alignments : Dict[Pair, PairAlignment]
        Successful alignments keyed by sorted sample pair
    matches : Dict[Pair, PairMatches]
        Matches of every fully successful pair
    failures : List[PairFailure]
        Pairs skipped because alignment or matching failed
    elapsed_seconds : float
        Wall time for the whole batch
    """

    alignments: Dict[Pair, PairAlignment] = field(default_factory=dict)
    matches: Dict[Pair, PairMatches] = field(default_factory=dict)
    failures: List[PairFailure] = field(default_factory=list)
    elapsed_seconds: float = 0.0

    @property
    def n_pairs(self) -> int:
        return len(self.matches) + len(self.failures)

    @property
    def n_succeeded(self) -> int:
        return len(self.matches)

    @property
    def succeeded_pairs(self) -> List[Pair]:
        return sorted(self.matches)

    def summary_dict(self) -> Dict[str, Any]:
        """Return summary dictionary for JSON export."""
        return {
            "n_pairs": self.n_pairs,
            "n_succeeded": self.n_succeeded,
            "n_failed": len(self.failures),
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "pairs": [self.matches[p].summary_dict() for p in self.succeeded_pairs],
            "failures": [f.to_dict() for f in self.failures],
        }


@dataclass
class GraphBuildResult:
    """Joint graph plus the report of the pairs it was built from."""

    graph: JointGraph
    report: AlignmentReport
    base_graph: Optional[JointGraph] = None
    balance_factor: Optional[str] = None
    alignment_strength: float = 0.0

    @property
    def rebalanced(self) -> bool:
        return self.base_graph is not None

    def summary_dict(self) -> Dict[str, Any]:
        """Return summary dictionary for JSON export."""
        return {
            "graph": self.graph.summary_dict(),
            "alignment": self.report.summary_dict(),
            "rebalanced": self.rebalanced,
            "balance_factor": self.balance_factor,
            "alignment_strength": self.alignment_strength,
        }


class IntegrationEngine:
    """Builds and queries the joint graph of a sample registry.

    Parameters
    ----------
    registry : SampleRegistry
        Samples to integrate
    config : WeaveConfig, optional
        Master configuration. If None, uses defaults.
    cache : PairwiseResultCache, optional
        Alignment cache to reuse. If None, the session creates its own.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> engine = IntegrationEngine(registry, WeaveConfig.default())
    >>> build = engine.build_graph()
    >>> result = engine.propagate_labels(seed_labels)
    >>> communities = engine.find_communities()
    """

    def __init__(
        self,
        registry: SampleRegistry,
        config: Optional[WeaveConfig] = None,
        cache: Optional[PairwiseResultCache] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.registry = registry
        self.config = config or WeaveConfig.default()
        self.cache = cache if cache is not None else PairwiseResultCache()
        self.logger = logger or logging.getLogger(__name__)

        self.aligner = PairwiseAligner(self.config.alignment, cache=self.cache, logger=self.logger)
        self.matcher = MutualNeighborMatcher(self.config.matching, logger=self.logger)
        self.assembler = GraphAssembler(
            self.config.graph, matching_config=self.config.matching, logger=self.logger
        )
        self.propagator = LabelPropagationEngine(self.config.propagation, logger=self.logger)

        self.graph: Optional[JointGraph] = None
        self.last_build: Optional[GraphBuildResult] = None
        self._tokens: Dict[Pair, CancelToken] = {}
        self._tokens_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Pairwise stage
    # ------------------------------------------------------------------

    def _canonical_pairs(self, pairs: Optional[Iterable[Pair]]) -> List[Pair]:
        if pairs is None:
            return self.registry.pairs()
        canonical = set()
        for a, b in pairs:
            for sample_id in (a, b):
                if sample_id not in self.registry:
                    raise InputError(f"Unknown sample '{sample_id}'")
            if a == b:
                raise InputError("A pair needs two different samples", {"sample_id": a})
            canonical.add(tuple(sorted((str(a), str(b)))))
        return sorted(canonical)

    def _process_pair(self, pair: Pair) -> Tuple[PairAlignment, PairMatches]:
        sample_a, sample_b = self.registry[pair[0]], self.registry[pair[1]]
        token = CancelToken(timeout=self.config.parallel.pair_timeout, label=f"{pair[0]}|{pair[1]}")
        with self._tokens_lock:
            self._tokens[pair] = token
        try:
            alignment = self.aligner.align(sample_a, sample_b, token=token)
            return alignment, self.matcher.match(alignment, token=token)
        finally:
            with self._tokens_lock:
                self._tokens.pop(pair, None)

    def cancel_all(self) -> int:
        """Cancel every in-flight pair computation; returns how many were cancelled."""
        with self._tokens_lock:
            tokens = list(self._tokens.values())
        for token in tokens:
            token.cancel()
        return len(tokens)

    def align_pairs(self, pairs: Optional[Iterable[Pair]] = None) -> AlignmentReport:
        """Align and match sample pairs on the worker pool.

        Pair failures (alignment, matching, cancellation or timeout) are logged
        and recorded in the report; they never abort the batch.

        Parameters
        ----------
        pairs : Iterable[Tuple[str, str]], optional
            Pairs to process. Defaults to every pair in the registry.

        Returns
        -------
        AlignmentReport
        """
        start = time.time()
        pairs = self._canonical_pairs(pairs)
        n_workers = min(self.config.parallel.n_workers, max(len(pairs), 1))
        report = AlignmentReport()

        self.logger.info(
            "Aligning %d sample pairs in %s space (%d workers)",
            len(pairs),
            self.config.alignment.space,
            n_workers,
        )

        with ThreadPoolExecutor(max_workers=n_workers) as executor:
            futures = {executor.submit(self._process_pair, pair): pair for pair in pairs}
            for future in as_completed(futures):
                pair = futures[future]
                try:
                    alignment, matches = future.result()
                except (AlignmentError, MatchingError) as exc:
                    stage = "matching" if isinstance(exc, MatchingError) else "alignment"
                    cached = self.cache.get(
                        self.aligner.key_for(self.registry[pair[0]], self.registry[pair[1]])
                    )
                    if cached is not None:
                        report.alignments[pair] = cached
                    report.failures.append(
                        PairFailure(pair[0], pair[1], stage, type(exc).__name__, str(exc))
                    )
                    self.logger.warning(
                        "Skipping pair %s|%s (%s failed): %s", pair[0], pair[1], stage, exc
                    )
                    continue
                report.alignments[pair] = alignment
                report.matches[pair] = matches

        report.failures.sort(key=lambda f: (f.sample_a, f.sample_b))
        report.elapsed_seconds = time.time() - start
        self.logger.info(
            "Pairwise stage finished: %d/%d pairs succeeded in %.2fs (cache: %s)",
            report.n_succeeded,
            len(pairs),
            report.elapsed_seconds,
            self.cache.stats(),
        )
        return report

    # ------------------------------------------------------------------
    # Graph
    # ------------------------------------------------------------------

    def resolve_factor(self, factor: Union[str, pd.Series, Mapping[str, Any]], graph: JointGraph) -> pd.Series:
        """Turn a factor spec into a cell id -> level Series.

        ``"sample"`` means sample membership; any other string names a key of
        the samples' metadata, broadcast to their cells. Series and mappings
        are used as given.
        """
        if isinstance(factor, str):
            if factor == "sample":
                return pd.Series(graph.node_samples, index=graph.node_index(), name="sample")
            levels = {}
            for sample in self.registry:
                if factor not in sample.metadata:
                    raise InputError(
                        f"Sample '{sample.sample_id}' has no metadata '{factor}'",
                        {"factor": factor},
                    )
                levels[sample.sample_id] = sample.metadata[factor]
            return pd.Series(
                [levels[s] for s in graph.node_samples], index=graph.node_index(), name=factor
            )
        if isinstance(factor, pd.Series):
            return factor
        return pd.Series(dict(factor))

    def build_graph(
        self,
        balance_factor: Optional[Union[str, pd.Series, Mapping[str, Any]]] = None,
        alignment_strength: Optional[float] = None,
        pairs: Optional[Iterable[Pair]] = None,
    ) -> GraphBuildResult:
        """Align every pair, then assemble and optionally rebalance the graph.

        Parameters
        ----------
        balance_factor : str, pd.Series or Mapping, optional
            Factor to rebalance on. Uses ``config.graph.balance_factor`` if None.
        alignment_strength : float, optional
            Rebalancing strength. Uses ``config.graph.alignment_strength`` if None.
        pairs : Iterable[Tuple[str, str]], optional
            Restrict alignment to these pairs

        Returns
        -------
        GraphBuildResult

        Raises
        ------
        GraphAssemblyError
            If the registry is empty, every pair failed, or no edge survives
        """
        if len(self.registry) == 0:
            raise GraphAssemblyError("Registry has no samples")

        report = self.align_pairs(pairs)
        if len(self.registry) >= 2 and report.n_succeeded == 0:
            raise GraphAssemblyError(
                "No sample pair could be aligned and matched",
                {
                    "n_pairs": report.n_pairs,
                    "failures": [f"{f.sample_a}|{f.sample_b}: {f.error_type}" for f in report.failures[:5]],
                },
            )

        graph = self.assembler.assemble(
            self.registry,
            [report.matches[pair] for pair in report.succeeded_pairs],
            metric=self.config.alignment.metric,
        )

        factor = balance_factor if balance_factor is not None else self.config.graph.balance_factor
        strength = (
            alignment_strength
            if alignment_strength is not None
            else self.config.graph.alignment_strength
        )
        base_graph = None
        if factor is not None and strength > 0:
            base_graph = graph
            graph = rebalance(graph, self.resolve_factor(factor, graph), strength)

        result = GraphBuildResult(
            graph=graph,
            report=report,
            base_graph=base_graph,
            balance_factor=factor if isinstance(factor, str) else (None if factor is None else "custom"),
            alignment_strength=float(strength) if base_graph is not None else 0.0,
        )
        self.graph = graph
        self.last_build = result
        return result

    def _require_graph(self, graph: Optional[JointGraph]) -> JointGraph:
        if graph is not None:
            return graph
        if self.graph is None:
            self.build_graph()
        return self.graph

    # ------------------------------------------------------------------
    # Consumers of the graph
    # ------------------------------------------------------------------

    def propagate_labels(
        self,
        labels: Union[pd.Series, Mapping[str, str]],
        graph: Optional[JointGraph] = None,
        method: Optional[str] = None,
    ) -> PropagationResult:
        """Propagate seed labels over the joint graph (built on demand)."""
        return self.propagator.propagate(self._require_graph(graph), labels, method=method)

    def find_communities(
        self,
        detector: Optional[CommunityDetector] = None,
        graph: Optional[JointGraph] = None,
    ) -> pd.Series:
        """Partition the joint graph with a community detector (Leiden by default)."""
        return detect_communities(self._require_graph(graph), detector)

    def community_tree(
        self,
        partition: Optional[pd.Series] = None,
        graph: Optional[JointGraph] = None,
    ) -> MergeTree:
        """Merge tree over communities (detected with the default detector if None)."""
        graph = self._require_graph(graph)
        if partition is None:
            partition = detect_communities(graph)
        return community_merge_tree(graph, partition)

    def embed_graph(
        self,
        layout: Optional[LayoutFunction] = None,
        graph: Optional[JointGraph] = None,
        **params: Any,
    ) -> pd.DataFrame:
        """Lay out the joint graph (force-directed by default)."""
        return embed_graph(self._require_graph(graph), layout, **params)

    def cluster_count_matrices(
        self,
        partition: Union[pd.Series, Mapping[str, Any]],
        common_genes: bool = True,
    ) -> Dict[str, pd.DataFrame]:
        """Per-cluster sample x gene pooled counts."""
        return cluster_count_matrices(self.registry, partition, common_genes=common_genes)

    def invalidate_cache(self, sample_id: Optional[str] = None) -> int:
        """Drop cached alignments (all, or those involving one sample).

        The current graph is discarded as well since it may depend on them.
        """
        removed = self.cache.invalidate(sample_id=sample_id)
        self.graph = None
        self.last_build = None
        return removed
