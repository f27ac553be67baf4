"""Pytest configuration and shared fixtures for SampleWeave tests."""

import sys
from pathlib import Path

import pytest
import pandas as pd

# Add package to path
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Import mock data generators
from tests.fixtures import (
    create_batch_pair,
    create_mock_anndata,
    create_mock_registry,
    create_mock_sample,
    create_three_component_graph,
    component_seed_labels,
)


# ============================================================================
# Sample Fixtures
# ============================================================================


@pytest.fixture
def batch_pair():
    """Samples A and B with identical cells, B shifted by a constant."""
    return create_batch_pair(n_cells=60, n_genes=40, offset=2.0)


@pytest.fixture
def batch_registry(batch_pair):
    """Registry holding the batch-offset pair."""
    from sample_weave.core.registry import SampleRegistry

    return SampleRegistry(list(batch_pair))


@pytest.fixture
def three_sample_registry():
    """Three samples S0, S1, S2 drawn from the same gene programs."""
    return create_mock_registry(n_samples=3, n_cells=50, n_genes=40)


@pytest.fixture
def disjoint_sample():
    """Sample measuring none of the genes of the other mock samples."""
    return create_mock_sample(
        "Z",
        n_cells=40,
        n_genes=40,
        seed=7,
        genes=[f"Other{i}" for i in range(40)],
    )


# ============================================================================
# Graph Fixtures
# ============================================================================


@pytest.fixture
def three_component_graph():
    """Three disconnected rings of 30 nodes."""
    return create_three_component_graph(n_per_component=30)


@pytest.fixture
def component_seeds() -> pd.Series:
    """10% of every ring labeled with the ring's own class."""
    return component_seed_labels(n_per_component=30, fraction=0.1)


# ============================================================================
# File Fixtures
# ============================================================================


@pytest.fixture
def tmp_output_dir(tmp_path: Path) -> Path:
    """Create a temporary output directory for tests."""
    output_dir = tmp_path / "output"
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir


@pytest.fixture
def h5ad_files(tmp_path: Path):
    """Two .h5ad sample files (donor_a, donor_b) with a batch offset."""
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    paths = []
    for name, offset in (("donor_a", 0.0), ("donor_b", 1.5)):
        adata = create_mock_anndata(prefix=name, n_cells=60, n_genes=40, offset=offset)
        path = data_dir / f"{name}.h5ad"
        adata.write_h5ad(path)
        paths.append(path)
    return paths


@pytest.fixture
def manifest_yaml(tmp_path: Path, h5ad_files) -> Path:
    """Manifest listing the two sample files with relative paths."""
    import yaml

    manifest = {
        "defaults": {"embedding_key": None},
        "samples": [
            {"sample_id": "donor_a", "path": "data/donor_a.h5ad", "metadata": {"tissue": "lung"}},
            {"id": "donor_b", "path": "data/donor_b.h5ad", "metadata": {"tissue": "liver"}},
        ],
    }
    path = tmp_path / "samples.yaml"
    with open(path, "w") as f:
        yaml.dump(manifest, f)
    return path


@pytest.fixture
def weave_config_yaml(tmp_path: Path) -> Path:
    """Configuration file mixing nested sections and flat keys."""
    import yaml

    config = {
        "sample_weave": {
            "alignment": {"space": "PCA", "k": 10},
            "n.odgenes": 500,
            "matching_method": "mNN",
            "k_self": 8,
            "propagation": {"max_iterations": 40},
            "n_workers": 2,
            "seed": 7,
        }
    }
    path = tmp_path / "weave.yaml"
    with open(path, "w") as f:
        yaml.dump(config, f)
    return path
