"""Pairwise alignment module.

Projects a pair of samples into a shared comparison space (PCA, CPCA, CCA or
raw shared genes) and memoizes the result per (pair, space, parameters).

Example Usage
-------------
>>> from sample_weave.core.alignment import (
...     AlignmentConfig, PairwiseAligner, PairwiseResultCache,
... )
>>> cache = PairwiseResultCache()
>>> aligner = PairwiseAligner(AlignmentConfig(space="PCA", k=15), cache=cache)
>>> alignment = aligner.align(sample_a, sample_b)
>>> again = aligner.align(sample_a, sample_b)  # served from cache
>>> cache.n_computations
1
"""

from .config import (
    AlignmentConfig,
    AlignmentParams,
    ComparisonSpace,
    DistanceMetric,
)
from .cancel import CancelToken
from .result import AlignmentKey, PairAlignment
from .cache import PairwiseResultCache
from .spaces import (
    EMBEDDERS,
    JointEmbedding,
    embed_cca,
    embed_cpca,
    embed_genes,
    embed_pca,
    preprocess_pair,
)
from .aligner import PairwiseAligner, select_pair_genes

__all__ = [
    # Config
    "AlignmentConfig",
    "AlignmentParams",
    "ComparisonSpace",
    "DistanceMetric",
    # Cancellation
    "CancelToken",
    # Results and cache
    "AlignmentKey",
    "PairAlignment",
    "PairwiseResultCache",
    # Spaces
    "EMBEDDERS",
    "JointEmbedding",
    "embed_cca",
    "embed_cpca",
    "embed_genes",
    "embed_pca",
    "preprocess_pair",
    # Aligner
    "PairwiseAligner",
    "select_pair_genes",
]
