"""Joint embeddings of a sample pair, one function per comparison space.

Every embedder takes the two preprocessed (centered, optionally scaled)
cells x genes matrices and returns coordinates for both samples in one
shared space together with quality metrics.

- PCA: truncated basis of the pooled matrix (scanpy ARPACK PCA)
- CPCA: stepwise common principal components of the two covariances
- CCA: truncated SVD of the cell x cell cross-product X_A X_B^T
- Genes: the preprocessed expression itself
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple

import numpy as np
from scipy import linalg
from scipy.sparse.linalg import LinearOperator, svds

from ..errors import AlignmentError
from .cancel import CancelToken
from .config import AlignmentParams, ComparisonSpace

logger = logging.getLogger(__name__)


@dataclass
class JointEmbedding:
    """Coordinates of both samples in one comparison space."""

    coords_a: np.ndarray
    coords_b: np.ndarray
    metrics: Dict[str, Any] = field(default_factory=dict)

    @property
    def n_components(self) -> int:
        return self.coords_a.shape[1]


def preprocess_pair(
    xa: np.ndarray,
    xb: np.ndarray,
    var_scale: bool = True,
    common_centering: bool = False,
) -> Tuple[np.ndarray, np.ndarray]:
    """Center (and optionally scale) the gene-selected matrices of a pair.

    Parameters
    ----------
    xa, xb : np.ndarray
        Dense cells x genes matrices over the same genes
    var_scale : bool
        Divide each gene by its pooled standard deviation (after centering).
        Genes with zero pooled variance are left unscaled.
    common_centering : bool
        Subtract the pooled mean from both samples instead of each sample's
        own mean

    Returns
    -------
    Tuple[np.ndarray, np.ndarray]
        Preprocessed copies of xa and xb
    """
    xa = np.asarray(xa, dtype=np.float64)
    xb = np.asarray(xb, dtype=np.float64)
    if common_centering:
        pooled_mean = np.vstack([xa, xb]).mean(axis=0)
        xa = xa - pooled_mean
        xb = xb - pooled_mean
    else:
        xa = xa - xa.mean(axis=0)
        xb = xb - xb.mean(axis=0)

    if var_scale:
        pooled = np.vstack([xa, xb])
        std = pooled.std(axis=0, ddof=1) if pooled.shape[0] > 1 else np.ones(pooled.shape[1])
        std[~np.isfinite(std) | (std <= 0)] = 1.0
        xa = xa / std
        xb = xb / std
    return xa, xb


def effective_components(
    requested: int,
    n_genes: int,
    n_cells_a: int,
    n_cells_b: int,
    space: ComparisonSpace,
) -> int:
    """Number of components the space can deliver for this pair."""
    limit = min(requested, n_genes - 1, n_cells_a + n_cells_b - 1)
    if space == ComparisonSpace.CCA:
        limit = min(limit, min(n_cells_a, n_cells_b) - 1)
    return max(limit, 0)


def _flip_signs(loadings: np.ndarray) -> np.ndarray:
    """Make the largest-magnitude entry of every column positive."""
    rows = np.argmax(np.abs(loadings), axis=0)
    signs = np.sign(loadings[rows, np.arange(loadings.shape[1])])
    signs[signs == 0] = 1.0
    return signs


def embed_pca(
    xa: np.ndarray,
    xb: np.ndarray,
    params: AlignmentParams,
    token: Optional[CancelToken] = None,
) -> JointEmbedding:
    """Pooled PCA of both samples (symmetric in A and B)."""
    import scanpy as sc

    n_comps = effective_components(
        params.ncomps, xa.shape[1], xa.shape[0], xb.shape[0], ComparisonSpace.PCA
    )
    pooled = np.vstack([xa, xb])
    X_pca, components, variance_ratio, variance = sc.pp.pca(
        pooled,
        n_comps=n_comps,
        zero_center=True,
        svd_solver="arpack",
        random_state=params.random_seed,
        return_info=True,
        dtype="float64",
    )
    X_pca = np.asarray(X_pca, dtype=np.float64)
    n_a = xa.shape[0]
    return JointEmbedding(
        coords_a=X_pca[:n_a],
        coords_b=X_pca[n_a:],
        metrics={
            "explained_variance_ratio": np.asarray(variance_ratio).round(6).tolist(),
            "total_explained_variance": float(np.sum(variance_ratio)),
        },
    )


def _covariance(x: np.ndarray) -> np.ndarray:
    centered = x - x.mean(axis=0)
    return centered.T @ centered / max(x.shape[0] - 1, 1)


def embed_cpca(
    xa: np.ndarray,
    xb: np.ndarray,
    params: AlignmentParams,
    token: Optional[CancelToken] = None,
) -> JointEmbedding:
    """Common principal components of the two samples.

    Stepwise CPCA: each component starts from the matching eigenvector of the
    pooled covariance and is refined by power iteration on
    ``sum_i n_i / (x' S_i x) * S_i`` (per-sample covariances weighted by the
    inverse variance they already explain), deflated against the components
    found so far. The fixed point balances variance that is common to both
    samples rather than variance dominated by one of them.
    """
    n_comps = effective_components(
        params.ncomps, xa.shape[1], xa.shape[0], xb.shape[0], ComparisonSpace.CPCA
    )
    covariances = [_covariance(xa), _covariance(xb)]
    sizes = np.array([xa.shape[0], xb.shape[0]], dtype=np.float64)
    weights = sizes / sizes.sum()
    pooled = weights[0] * covariances[0] + weights[1] * covariances[1]
    if not np.all(np.isfinite(pooled)):
        raise AlignmentError("Covariance matrix contains non-finite values")

    evals, evecs = linalg.eigh(pooled)
    order = np.argsort(evals)[::-1]
    start = evecs[:, order]

    n_genes = xa.shape[1]
    basis = np.zeros((n_genes, n_comps))
    projector = np.eye(n_genes)
    component_variance = np.zeros((n_comps, 2))
    eps = 1e-12 * max(float(np.trace(pooled)), 1.0)

    for j in range(n_comps):
        if token is not None:
            token.check("cpca")
        x = projector @ start[:, j]
        norm = np.linalg.norm(x)
        if norm <= 0:
            raise AlignmentError("CPCA start vector collapsed", {"component": j})
        x /= norm

        for _ in range(params.cpca_max_iter):
            explained = np.array([x @ s @ x for s in covariances])
            if np.any(explained <= eps):
                raise AlignmentError(
                    "Ill-conditioned covariance: no variance along common component",
                    {"component": j},
                )
            weighted = sum(
                (n / v) * s for n, v, s in zip(sizes, explained, covariances)
            )
            x_new = projector @ (weighted @ x)
            norm = np.linalg.norm(x_new)
            if norm <= 0 or not np.isfinite(norm):
                raise AlignmentError("CPCA iteration diverged", {"component": j})
            x_new /= norm
            converged = np.linalg.norm(x_new - x) < params.cpca_tol
            x = x_new
            if converged:
                break

        basis[:, j] = x
        component_variance[j] = [x @ s @ x for s in covariances]
        projector = projector - np.outer(x, x)

    basis = basis * _flip_signs(basis)
    return JointEmbedding(
        coords_a=xa @ basis,
        coords_b=xb @ basis,
        metrics={
            "component_variance_a": component_variance[:, 0].round(6).tolist(),
            "component_variance_b": component_variance[:, 1].round(6).tolist(),
        },
    )


def embed_cca(
    xa: np.ndarray,
    xb: np.ndarray,
    params: AlignmentParams,
    token: Optional[CancelToken] = None,
) -> JointEmbedding:
    """Paired bases maximizing cross-sample correlation.

    Left and right singular vectors of ``X_A X_B^T`` give the coordinates of
    A cells and B cells. The cross-product is applied through a linear
    operator and never materialised. Cell coordinates are L2-normalised.
    """
    n_comps = effective_components(
        params.ncomps, xa.shape[1], xa.shape[0], xb.shape[0], ComparisonSpace.CCA
    )
    n_a, n_b = xa.shape[0], xb.shape[0]
    operator = LinearOperator(
        shape=(n_a, n_b),
        matvec=lambda v: xa @ (xb.T @ np.ravel(v)),
        rmatvec=lambda u: xb @ (xa.T @ np.ravel(u)),
        dtype=np.float64,
    )
    rng = np.random.default_rng(params.random_seed)
    v0 = rng.standard_normal(min(n_a, n_b))
    u, s, vt = svds(operator, k=n_comps, v0=v0)

    order = np.argsort(s)[::-1]
    u = u[:, order]
    s = s[order]
    v = vt[order].T

    signs = _flip_signs(u)
    u = u * signs
    v = v * signs

    if not (np.all(np.isfinite(u)) and np.all(np.isfinite(v))):
        raise AlignmentError("CCA decomposition produced non-finite values")

    return JointEmbedding(
        coords_a=_normalize_rows(u),
        coords_b=_normalize_rows(v),
        metrics={"singular_values": s.round(6).tolist()},
    )


def _normalize_rows(x: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(x, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return x / norms


def embed_genes(
    xa: np.ndarray,
    xb: np.ndarray,
    params: AlignmentParams,
    token: Optional[CancelToken] = None,
) -> JointEmbedding:
    """Shared gene space without a joint embedding."""
    return JointEmbedding(coords_a=xa.copy(), coords_b=xb.copy())


EMBEDDERS: Dict[ComparisonSpace, Callable[..., JointEmbedding]] = {
    ComparisonSpace.PCA: embed_pca,
    ComparisonSpace.CPCA: embed_cpca,
    ComparisonSpace.CCA: embed_cca,
    ComparisonSpace.GENES: embed_genes,
}
