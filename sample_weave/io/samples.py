"""Sample loading from AnnData files and YAML manifests.

A manifest lists one entry per sample; paths are resolved relative to the
manifest file, and ``defaults`` apply to every entry:

.. code-block:: yaml

    defaults:
      embedding_key: X_pca
      layer: counts
    samples:
      - sample_id: donor_a
        path: data/donor_a.h5ad
        metadata: {tissue: lung}
      - sample_id: donor_b
        path: data/donor_b.h5ad
        cluster_key: leiden
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from ..core.errors import InputError
from ..core.registry import Sample, SampleRegistry

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

SAMPLE_OPTIONS = ("embedding_key", "cluster_key", "odgenes_key", "layer")


def load_sample_h5ad(
    path: PathLike,
    sample_id: Optional[str] = None,
    embedding_key: Optional[str] = "X_pca",
    cluster_key: Optional[str] = None,
    odgenes_key: Optional[str] = "highly_variable",
    layer: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Sample:
    """Read an ``.h5ad`` file into a Sample.

    Parameters
    ----------
    path : PathLike
        AnnData file
    sample_id : str, optional
        Sample id (defaults to the file stem)

    Other parameters are passed to :meth:`Sample.from_anndata`.

    Raises
    ------
    InputError
        If the file does not exist
    """
    import anndata as ad

    path = Path(path)
    if not path.exists():
        raise InputError(f"Sample file not found: {path}")
    adata = ad.read_h5ad(path)
    sample = Sample.from_anndata(
        adata,
        sample_id=sample_id or path.stem,
        embedding_key=embedding_key,
        cluster_key=cluster_key,
        odgenes_key=odgenes_key,
        layer=layer,
        metadata=metadata,
    )
    logger.debug("Loaded %s from %s", sample.sample_id, path)
    return sample


def read_manifest(path: PathLike) -> List[Dict[str, Any]]:
    """Parse a manifest into resolved per-sample entries."""
    path = Path(path)
    if not path.exists():
        raise InputError(f"Manifest not found: {path}")
    with open(path) as f:
        data = yaml.safe_load(f) or {}

    if isinstance(data, list):
        data = {"samples": data}
    entries = data.get("samples")
    if not entries:
        raise InputError("Manifest lists no samples", {"path": str(path)})
    defaults = data.get("defaults") or {}

    resolved = []
    for i, entry in enumerate(entries):
        if not isinstance(entry, dict) or "path" not in entry:
            raise InputError(f"Manifest entry {i} has no 'path'", {"path": str(path)})
        merged = dict(defaults)
        merged.update(entry)
        sample_path = Path(merged["path"])
        if not sample_path.is_absolute():
            sample_path = (path.parent / sample_path).resolve()
        merged["path"] = sample_path
        merged["sample_id"] = str(merged.get("sample_id") or merged.get("id") or sample_path.stem)
        merged.pop("id", None)
        resolved.append(merged)
    return resolved


def load_manifest(path: PathLike) -> SampleRegistry:
    """Load every sample of a manifest into a new registry.

    Raises
    ------
    InputError
        On a malformed manifest or missing sample file
    DuplicateCellIdError
        If cell ids collide across samples
    """
    registry = SampleRegistry()
    for entry in read_manifest(path):
        options = {key: entry[key] for key in SAMPLE_OPTIONS if key in entry}
        registry.register(
            load_sample_h5ad(
                entry["path"],
                sample_id=entry["sample_id"],
                metadata=entry.get("metadata"),
                **options,
            )
        )
    logger.info("Loaded %d samples (%d cells) from %s", len(registry), registry.n_cells, path)
    return registry


def load_samples(paths: List[PathLike], **options: Any) -> SampleRegistry:
    """Load a list of ``.h5ad`` files (sample ids from file stems)."""
    registry = SampleRegistry()
    for path in paths:
        registry.register(load_sample_h5ad(path, **options))
    return registry
