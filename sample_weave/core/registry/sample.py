"""Sample contract: one specimen's cell-by-gene measurements.

A sample is a structural contract rather than a class hierarchy: any producer
that can supply a nonnegative cell x gene matrix, unique cell and gene names
and, optionally, an embedding, a clustering and an over-dispersion gene
ranking is accepted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from scipy import sparse

from ..errors import InputError


def _read_only(array: np.ndarray) -> np.ndarray:
    array.setflags(write=False)
    return array


def rank_genes_by_dispersion(
    matrix: sparse.spmatrix,
    gene_names: np.ndarray,
) -> List[str]:
    """Rank genes by variance-to-mean ratio (descending).

    Genes with zero mean get dispersion 0. Ties are broken by gene name so the
    ranking is deterministic.

    Parameters
    ----------
    matrix : sparse.spmatrix
        Cell x gene matrix
    gene_names : np.ndarray
        Gene names aligned to matrix columns

    Returns
    -------
    List[str]
        Gene names, most over-dispersed first
    """
    X = sparse.csr_matrix(matrix, dtype=np.float64)
    mean = np.asarray(X.mean(axis=0)).ravel()
    mean_sq = np.asarray(X.multiply(X).mean(axis=0)).ravel()
    var = np.maximum(mean_sq - mean**2, 0.0)
    with np.errstate(divide="ignore", invalid="ignore"):
        dispersion = np.where(mean > 0, var / mean, 0.0)
    order = np.lexsort((gene_names.astype(str), -dispersion))
    return [str(g) for g in gene_names[order]]


@dataclass(eq=False)
class Sample:
    """One sample's measurements and optional upstream annotations.

    Attributes
    ----------
    sample_id : str
        Unique sample identifier
    counts : sparse.csr_matrix
        Nonnegative cell x gene matrix (already normalized upstream)
    cell_ids : np.ndarray
        Cell identifiers, unique across all registered samples
    gene_names : np.ndarray
        Gene names, unique within the sample
    embedding : np.ndarray, optional
        Precomputed per-cell embedding (cells x dims), e.g. a per-sample PCA
    clusters : pd.Series, optional
        Precomputed clustering indexed by cell id
    overdispersed_genes : List[str], optional
        Gene names ranked by over-dispersion, most variable first
    metadata : Dict[str, Any]
        Free-form sample-level annotations (tissue, batch, condition)
    """

    sample_id: str
    counts: Any
    cell_ids: Sequence[str]
    gene_names: Sequence[str]
    embedding: Optional[np.ndarray] = None
    clusters: Optional[pd.Series] = None
    overdispersed_genes: Optional[List[str]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.sample_id = str(self.sample_id)
        if not self.sample_id:
            raise InputError("Sample id must be a non-empty string")

        if sparse.issparse(self.counts):
            counts = sparse.csr_matrix(self.counts, dtype=np.float64, copy=True)
        else:
            dense = np.asarray(self.counts, dtype=np.float64)
            if dense.ndim != 2:
                raise InputError(
                    "Sample matrix must be two-dimensional",
                    {"sample_id": self.sample_id, "ndim": dense.ndim},
                )
            counts = sparse.csr_matrix(dense)

        if counts.nnz and (not np.all(np.isfinite(counts.data)) or counts.data.min() < 0):
            raise InputError(
                "Sample matrix must be finite and nonnegative",
                {"sample_id": self.sample_id},
            )
        counts.sort_indices()
        self.counts = counts

        cell_ids = np.asarray([str(c) for c in self.cell_ids], dtype=object)
        gene_names = np.asarray([str(g) for g in self.gene_names], dtype=object)
        n_cells, n_genes = counts.shape

        if len(cell_ids) != n_cells:
            raise InputError(
                "Number of cell ids does not match matrix rows",
                {"sample_id": self.sample_id, "n_ids": len(cell_ids), "n_rows": n_cells},
            )
        if len(gene_names) != n_genes:
            raise InputError(
                "Number of gene names does not match matrix columns",
                {"sample_id": self.sample_id, "n_genes": len(gene_names), "n_cols": n_genes},
            )
        if n_cells == 0:
            raise InputError("Sample has no cells", {"sample_id": self.sample_id})

        dup_cells = pd.Index(cell_ids)[pd.Index(cell_ids).duplicated()]
        if len(dup_cells):
            raise InputError(
                "Duplicate cell ids within sample",
                {"sample_id": self.sample_id, "examples": list(dup_cells[:5])},
            )
        if pd.Index(gene_names).duplicated().any():
            raise InputError("Duplicate gene names within sample", {"sample_id": self.sample_id})

        self.cell_ids = _read_only(cell_ids)
        self.gene_names = _read_only(gene_names)

        if self.embedding is not None:
            embedding = np.array(self.embedding, dtype=np.float64)
            if embedding.ndim != 2 or embedding.shape[0] != n_cells:
                raise InputError(
                    "Embedding must have one row per cell",
                    {"sample_id": self.sample_id, "shape": embedding.shape},
                )
            self.embedding = _read_only(embedding)

        if self.clusters is not None:
            clusters = pd.Series(self.clusters).copy()
            if not clusters.index.astype(str).isin(list(cell_ids)).all():
                raise InputError(
                    "Clustering refers to cells outside the sample",
                    {"sample_id": self.sample_id},
                )
            clusters.index = clusters.index.astype(str)
            self.clusters = clusters

        if self.overdispersed_genes is not None:
            self.overdispersed_genes = [str(g) for g in self.overdispersed_genes]

        self.metadata = dict(self.metadata or {})
        self._gene_ranking: Optional[List[str]] = None
        self._positions: Optional[pd.Index] = None

    @property
    def n_cells(self) -> int:
        return self.counts.shape[0]

    @property
    def n_genes(self) -> int:
        return self.counts.shape[1]

    def gene_index(self) -> pd.Index:
        """Gene names as a pandas Index (column positions)."""
        return pd.Index(self.gene_names)

    def cell_index(self) -> pd.Index:
        """Cell ids as a pandas Index (row positions)."""
        if self._positions is None:
            self._positions = pd.Index(self.cell_ids)
        return self._positions

    def ranked_genes(self, n: Optional[int] = None) -> List[str]:
        """Return the top-n over-dispersed genes.

        Uses the upstream ranking when one was supplied, otherwise falls back
        to a variance-to-mean ranking of the sample matrix.
        """
        if self._gene_ranking is None:
            if self.overdispersed_genes:
                known = set(self.gene_names)
                self._gene_ranking = [g for g in self.overdispersed_genes if g in known]
            else:
                self._gene_ranking = rank_genes_by_dispersion(self.counts, self.gene_names)
        return list(self._gene_ranking if n is None else self._gene_ranking[:n])

    def expression(self, genes: Sequence[str]) -> np.ndarray:
        """Dense cells x genes expression for the given gene names."""
        positions = self.gene_index().get_indexer(list(genes))
        if (positions < 0).any():
            missing = [g for g, p in zip(genes, positions) if p < 0]
            raise InputError(
                "Genes not measured in sample",
                {"sample_id": self.sample_id, "examples": missing[:5]},
            )
        return self.counts[:, positions].toarray()

    @classmethod
    def from_anndata(
        cls,
        adata: Any,  # AnnData
        sample_id: str,
        embedding_key: Optional[str] = "X_pca",
        cluster_key: Optional[str] = None,
        odgenes_key: Optional[str] = "highly_variable",
        layer: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> "Sample":
        """Build a Sample from an AnnData object.

        Parameters
        ----------
        adata : AnnData
            Per-sample AnnData (cells x genes)
        sample_id : str
            Sample identifier
        embedding_key : str, optional
            Key in adata.obsm with a precomputed embedding (ignored if absent)
        cluster_key : str, optional
            Column in adata.obs with a precomputed clustering
        odgenes_key : str, optional
            Boolean column in adata.var flagging over-dispersed genes. Flagged
            genes are ordered by ``highly_variable_rank`` or
            ``dispersions_norm`` when scanpy stored them.
        layer : str, optional
            Layer to use instead of adata.X
        metadata : Dict[str, Any], optional
            Sample-level annotations

        Returns
        -------
        Sample
        """
        if layer is not None:
            if layer not in adata.layers:
                raise InputError(
                    f"Layer '{layer}' not found in AnnData", {"sample_id": sample_id}
                )
            matrix = adata.layers[layer]
        else:
            matrix = adata.X

        embedding = None
        if embedding_key and embedding_key in adata.obsm:
            embedding = np.asarray(adata.obsm[embedding_key])

        clusters = None
        if cluster_key:
            if cluster_key not in adata.obs.columns:
                raise InputError(
                    f"Cluster column '{cluster_key}' not found in adata.obs",
                    {"sample_id": sample_id},
                )
            clusters = adata.obs[cluster_key].astype(str)

        odgenes = None
        var = adata.var
        if odgenes_key and odgenes_key in var.columns:
            flagged = var[var[odgenes_key].astype(bool)]
            if "highly_variable_rank" in flagged.columns:
                flagged = flagged.sort_values("highly_variable_rank", kind="stable")
            elif "dispersions_norm" in flagged.columns:
                flagged = flagged.sort_values("dispersions_norm", ascending=False, kind="stable")
            odgenes = flagged.index.astype(str).tolist() or None

        return cls(
            sample_id=sample_id,
            counts=matrix,
            cell_ids=adata.obs_names.astype(str).tolist(),
            gene_names=adata.var_names.astype(str).tolist(),
            embedding=embedding,
            clusters=clusters,
            overdispersed_genes=odgenes,
            metadata=metadata or {},
        )

    def summary_dict(self) -> Dict[str, Any]:
        """Return summary dictionary for JSON export."""
        return {
            "sample_id": self.sample_id,
            "n_cells": self.n_cells,
            "n_genes": self.n_genes,
            "has_embedding": self.embedding is not None,
            "has_clusters": self.clusters is not None,
            "metadata": self.metadata,
        }
