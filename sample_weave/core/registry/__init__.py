"""Sample registry module.

Holds the per-sample matrices and embeddings that every other module reads.

Example Usage
-------------
>>> from sample_weave.core.registry import Sample, SampleRegistry
>>> registry = SampleRegistry()
>>> registry.register(Sample.from_anndata(adata, "donor_1"))
>>> registry.pairs()
"""

from .sample import (
    Sample,
    rank_genes_by_dispersion,
)
from .registry import SampleRegistry

__all__ = [
    "Sample",
    "SampleRegistry",
    "rank_genes_by_dispersion",
]
