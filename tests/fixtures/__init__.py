"""Test fixtures for SampleWeave.

Provides mock data generators and test utilities.
"""

from .mock_samples import (
    make_profiles,
    gene_names,
    create_mock_sample,
    create_batch_pair,
    create_identity_copy,
    create_mock_registry,
    create_mock_anndata,
    create_three_component_graph,
    component_seed_labels,
)

__all__ = [
    "make_profiles",
    "gene_names",
    "create_mock_sample",
    "create_batch_pair",
    "create_identity_copy",
    "create_mock_registry",
    "create_mock_anndata",
    "create_three_component_graph",
    "component_seed_labels",
]
