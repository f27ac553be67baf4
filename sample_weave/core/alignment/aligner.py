"""Pairwise aligner: projects a sample pair into a shared comparison space."""

from __future__ import annotations

import logging
import time
from typing import Dict, List, Optional, Union

import numpy as np

from ..errors import AlignmentError
from ..registry import Sample
from .cache import PairwiseResultCache
from .cancel import CancelToken
from .config import AlignmentConfig, AlignmentParams, ComparisonSpace
from .result import AlignmentKey, PairAlignment
from .spaces import EMBEDDERS, effective_components, preprocess_pair


def select_pair_genes(
    sample_a: Sample,
    sample_b: Sample,
    n_odgenes: int,
) -> List[str]:
    """Pick the genes a pair is compared on.

    Takes the top ``n_odgenes`` over-dispersed genes of each sample among the
    genes both samples measure, and returns their union ordered by best rank
    (then by name).
    """
    shared = set(sample_a.gene_names) & set(sample_b.gene_names)
    best_rank: Dict[str, int] = {}
    for sample in (sample_a, sample_b):
        ranked = [g for g in sample.ranked_genes() if g in shared][:n_odgenes]
        for rank, gene in enumerate(ranked):
            if rank < best_rank.get(gene, n_odgenes + 1):
                best_rank[gene] = rank
    return sorted(best_rank, key=lambda g: (best_rank[g], g))


class PairwiseAligner:
    """Aligns sample pairs, memoizing results in a PairwiseResultCache.

    Parameters
    ----------
    config : AlignmentConfig, optional
        Alignment configuration. If None, uses defaults.
    cache : PairwiseResultCache, optional
        Cache shared with other aligners of the same session. If None, a
        private cache is created.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> aligner = PairwiseAligner(AlignmentConfig(space="CPCA", k=10))
    >>> alignment = aligner.align(sample_a, sample_b)
    >>> alignment.coords_a.shape
    (500, 30)
    """

    def __init__(
        self,
        config: Optional[AlignmentConfig] = None,
        cache: Optional[PairwiseResultCache] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or AlignmentConfig()
        self.cache = cache if cache is not None else PairwiseResultCache()
        self.logger = logger or logging.getLogger(__name__)

    def key_for(
        self,
        sample_a: Sample,
        sample_b: Sample,
        space: Optional[Union[str, ComparisonSpace]] = None,
        params: Optional[AlignmentParams] = None,
    ) -> AlignmentKey:
        space = ComparisonSpace.parse(space or self.config.space)
        params = params or self.config.to_params()
        return AlignmentKey.create(sample_a.sample_id, sample_b.sample_id, space, params)

    def align(
        self,
        sample_a: Sample,
        sample_b: Sample,
        space: Optional[Union[str, ComparisonSpace]] = None,
        params: Optional[AlignmentParams] = None,
        token: Optional[CancelToken] = None,
    ) -> PairAlignment:
        """Align two samples, returning the cached result when present.

        Parameters
        ----------
        sample_a, sample_b : Sample
            The pair to align
        space : str or ComparisonSpace, optional
            Comparison space. Uses config default if None.
        params : AlignmentParams, optional
            Parameter struct. Uses config defaults if None.
        token : CancelToken, optional
            Cancellation token checked between stages

        Returns
        -------
        PairAlignment
            Alignment oriented so that ``sample_a`` is the first sample

        Raises
        ------
        AlignmentError
            If the pair cannot be aligned (too few cells, genes or components)
        """
        space = ComparisonSpace.parse(space or self.config.space)
        params = params or self.config.to_params()
        if sample_a.sample_id == sample_b.sample_id:
            raise AlignmentError(
                "Cannot align a sample with itself", {"sample_id": sample_a.sample_id}
            )

        key = AlignmentKey.create(sample_a.sample_id, sample_b.sample_id, space, params)
        first, second = (
            (sample_a, sample_b)
            if sample_a.sample_id == key.sample_a
            else (sample_b, sample_a)
        )
        alignment = self.cache.get_or_compute(
            key, lambda: self.compute(first, second, space, params, token)
        )
        return alignment.oriented(sample_a.sample_id)

    def compute(
        self,
        sample_a: Sample,
        sample_b: Sample,
        space: ComparisonSpace,
        params: AlignmentParams,
        token: Optional[CancelToken] = None,
    ) -> PairAlignment:
        """Compute an alignment without consulting the cache."""
        start = time.time()
        label = f"{sample_a.sample_id}|{sample_b.sample_id}"
        context = {"pair": label, "space": space.value}

        for sample in (sample_a, sample_b):
            if sample.n_cells < params.k:
                raise AlignmentError(
                    f"Sample '{sample.sample_id}' has fewer cells than k",
                    dict(context, n_cells=sample.n_cells, k=params.k),
                )

        genes = select_pair_genes(sample_a, sample_b, params.n_odgenes)
        if len(genes) < params.min_shared_genes:
            raise AlignmentError(
                "Too few shared over-dispersed genes",
                dict(context, n_genes=len(genes), minimum=params.min_shared_genes),
            )

        if space != ComparisonSpace.GENES:
            n_comps = effective_components(
                params.ncomps, len(genes), sample_a.n_cells, sample_b.n_cells, space
            )
            if n_comps < params.min_components:
                raise AlignmentError(
                    "Too few usable components",
                    dict(context, n_components=n_comps, minimum=params.min_components),
                )

        if token is not None:
            token.check("gene selection")

        xa, xb = preprocess_pair(
            sample_a.expression(genes),
            sample_b.expression(genes),
            var_scale=params.var_scale,
            common_centering=params.common_centering,
        )
        if token is not None:
            token.check("preprocessing")

        try:
            embedding = EMBEDDERS[space](xa, xb, params, token)
        except AlignmentError as exc:
            exc.context.update(context)
            raise
        except (np.linalg.LinAlgError, ArithmeticError, ValueError) as exc:
            raise AlignmentError(f"Embedding failed: {exc}", context) from exc

        if token is not None:
            token.check("embedding")

        metrics = dict(embedding.metrics)
        metrics["n_genes"] = len(genes)
        metrics["n_components"] = embedding.n_components

        elapsed = time.time() - start
        self.logger.info(
            "Aligned %s in %s space: %d genes, %d components (%.2fs)",
            label,
            space.value,
            len(genes),
            embedding.n_components,
            elapsed,
        )
        return PairAlignment.build(
            sample_a=sample_a.sample_id,
            sample_b=sample_b.sample_id,
            space=space,
            params=params,
            coords_a=embedding.coords_a,
            coords_b=embedding.coords_b,
            genes=tuple(genes),
            metrics=metrics,
        )
