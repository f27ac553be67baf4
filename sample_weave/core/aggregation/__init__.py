"""Meta-cell aggregation module.

Example Usage
-------------
>>> from sample_weave.core.aggregation import cluster_count_matrices
>>> matrices = cluster_count_matrices(registry, result.hard_labels)
>>> matrices["T cells"].shape
(3, 1840)
"""

from .metacells import cluster_count_matrices, pool_sample_by_cluster

__all__ = [
    "cluster_count_matrices",
    "pool_sample_by_cluster",
]
