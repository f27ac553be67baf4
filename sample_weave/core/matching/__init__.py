"""Inter-sample matching module.

Finds mutual (or one-sided) nearest neighbors between the cells of two
aligned samples and weights each pair by its distance in the comparison space.

Example Usage
-------------
>>> from sample_weave.core.matching import MatchingConfig, MutualNeighborMatcher
>>> matcher = MutualNeighborMatcher(MatchingConfig(matching_method="mNN"))
>>> matches = matcher.match(alignment)
>>> matches.to_frame(sample_a.cell_ids, sample_b.cell_ids).head()
"""

from .config import MatchingConfig, MatchingMethod
from .neighbors import (
    KnnResult,
    approx_knn,
    exact_knn,
    knn_search,
    pairwise_distances,
    self_knn,
)
from .mnn import (
    MutualNeighborMatcher,
    PairMatches,
    distance_to_weight,
    median_nonzero,
)

__all__ = [
    # Config
    "MatchingConfig",
    "MatchingMethod",
    # Neighbor search
    "KnnResult",
    "approx_knn",
    "exact_knn",
    "knn_search",
    "pairwise_distances",
    "self_knn",
    # Matching
    "MutualNeighborMatcher",
    "PairMatches",
    "distance_to_weight",
    "median_nonzero",
]
