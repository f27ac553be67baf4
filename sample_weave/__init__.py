"""SampleWeave: joint-graph integration of single-cell samples.

This package provides tools for:
- Registering independently measured samples behind one read-only registry
- Pairwise alignment of samples in a shared comparison space (PCA, CPCA, CCA, genes)
- Mutual-nearest-neighbor matching of cells across aligned samples
- Assembly of a joint weighted neighbor graph with optional edge rebalancing
- Diffusion-based label propagation across the joint graph
- Pluggable community detection and graph layout on the joint graph

Example usage:
    >>> from sample_weave.core.registry import Sample, SampleRegistry
    >>> from sample_weave.core.integration import IntegrationEngine
    >>>
    >>> registry = SampleRegistry()
    >>> registry.register(Sample.from_anndata(adata_a, "donor_a"))
    >>> registry.register(Sample.from_anndata(adata_b, "donor_b"))
    >>>
    >>> engine = IntegrationEngine(registry)
    >>> build = engine.build_graph()
    >>> result = engine.propagate_labels({"cell_1": "T cells", "cell_9": "B cells"})
"""

__version__ = "0.1.0"
