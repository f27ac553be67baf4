"""k-nearest-neighbor search between two point sets.

Exact search is chunked brute force over query cells (scipy ``cdist`` for L2,
normalized dot products for angular distance), with chunks processed in
parallel threads through joblib. Approximate search uses an Annoy index.
Both paths report angular distance as ``sqrt(2 * (1 - cos))`` so results are
interchangeable, and both break distance ties by the lower point index.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np
from joblib import Parallel, delayed
from scipy.spatial.distance import cdist

from ..alignment import CancelToken, DistanceMetric
from .config import MatchingConfig

logger = logging.getLogger(__name__)


@dataclass
class KnnResult:
    """Neighbor indices and distances, one row per query point.

    Missing neighbors (approximate search returning fewer than k) are marked
    with index -1 and distance inf.
    """

    indices: np.ndarray
    distances: np.ndarray
    approximate: bool = False

    @property
    def k(self) -> int:
        return self.indices.shape[1]


def _normalize_rows(x: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(x, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return x / norms


def pairwise_distances(
    query: np.ndarray,
    data: np.ndarray,
    metric: DistanceMetric,
) -> np.ndarray:
    """Dense query x data distance matrix."""
    if metric == DistanceMetric.ANGULAR:
        similarity = _normalize_rows(query) @ _normalize_rows(data).T
        return np.sqrt(np.clip(2.0 - 2.0 * similarity, 0.0, None))
    return cdist(query, data, metric="euclidean")


def _stable_top_k(distances: np.ndarray, k: int) -> Tuple[np.ndarray, np.ndarray]:
    order = np.argsort(distances, axis=1, kind="stable")[:, :k]
    return order, np.take_along_axis(distances, order, axis=1)


def _exact_chunk(
    query: np.ndarray,
    data: np.ndarray,
    k: int,
    metric: DistanceMetric,
    token: Optional[CancelToken],
) -> Tuple[np.ndarray, np.ndarray]:
    if token is not None:
        token.check("neighbor search")
    return _stable_top_k(pairwise_distances(query, data, metric), k)


def exact_knn(
    query: np.ndarray,
    data: np.ndarray,
    k: int,
    metric: DistanceMetric = DistanceMetric.ANGULAR,
    chunk_size: int = 2048,
    n_jobs: int = 1,
    token: Optional[CancelToken] = None,
) -> KnnResult:
    """Brute-force k nearest neighbors of every query point in ``data``.

    Parameters
    ----------
    query : np.ndarray
        Query points (n_query x dims)
    data : np.ndarray
        Indexed points (n_data x dims)
    k : int
        Neighbors per query (capped at n_data)
    metric : DistanceMetric
        angular or L2
    chunk_size : int
        Query points per chunk
    n_jobs : int
        Threads processing chunks
    token : CancelToken, optional
        Checked before every chunk

    Returns
    -------
    KnnResult
    """
    query = np.asarray(query, dtype=np.float64)
    data = np.asarray(data, dtype=np.float64)
    k = min(k, data.shape[0])
    bounds = [(s, min(s + chunk_size, query.shape[0])) for s in range(0, query.shape[0], chunk_size)]

    if n_jobs == 1 or len(bounds) == 1:
        parts = [_exact_chunk(query[s:e], data, k, metric, token) for s, e in bounds]
    else:
        parts = Parallel(n_jobs=n_jobs, backend="threading")(
            delayed(_exact_chunk)(query[s:e], data, k, metric, token) for s, e in bounds
        )

    if not parts:
        return KnnResult(np.zeros((0, k), dtype=np.int64), np.zeros((0, k)))
    indices = np.vstack([p[0] for p in parts]).astype(np.int64)
    distances = np.vstack([p[1] for p in parts])
    return KnnResult(indices, distances, approximate=False)


def _annoy_chunk(
    index,
    query: np.ndarray,
    k: int,
    search_k: int,
    token: Optional[CancelToken],
) -> Tuple[np.ndarray, np.ndarray]:
    if token is not None:
        token.check("approximate neighbor search")
    indices = np.full((query.shape[0], k), -1, dtype=np.int64)
    distances = np.full((query.shape[0], k), np.inf)
    for row, vector in enumerate(query):
        ids, dists = index.get_nns_by_vector(
            vector.tolist(), k, search_k=search_k, include_distances=True
        )
        if not ids:
            continue
        ids = np.asarray(ids, dtype=np.int64)
        dists = np.asarray(dists, dtype=np.float64)
        order = np.lexsort((ids, dists))
        indices[row, : len(ids)] = ids[order]
        distances[row, : len(ids)] = dists[order]
    return indices, distances


def approx_knn(
    query: np.ndarray,
    data: np.ndarray,
    k: int,
    metric: DistanceMetric = DistanceMetric.ANGULAR,
    n_trees: int = 50,
    search_k: int = -1,
    random_seed: int = 1337,
    chunk_size: int = 2048,
    n_jobs: int = 1,
    token: Optional[CancelToken] = None,
) -> KnnResult:
    """Approximate k nearest neighbors using an Annoy index over ``data``."""
    from annoy import AnnoyIndex

    query = np.asarray(query, dtype=np.float64)
    data = np.asarray(data, dtype=np.float64)
    k = min(k, data.shape[0])

    index = AnnoyIndex(data.shape[1], "angular" if metric == DistanceMetric.ANGULAR else "euclidean")
    index.set_seed(random_seed)
    for i in range(data.shape[0]):
        index.add_item(i, data[i].tolist())
    index.build(n_trees, n_jobs=1)
    if token is not None:
        token.check("index build")

    bounds = [(s, min(s + chunk_size, query.shape[0])) for s in range(0, query.shape[0], chunk_size)]
    if n_jobs == 1 or len(bounds) == 1:
        parts = [_annoy_chunk(index, query[s:e], k, search_k, token) for s, e in bounds]
    else:
        parts = Parallel(n_jobs=n_jobs, backend="threading")(
            delayed(_annoy_chunk)(index, query[s:e], k, search_k, token) for s, e in bounds
        )

    if not parts:
        return KnnResult(np.zeros((0, k), dtype=np.int64), np.zeros((0, k)), approximate=True)
    return KnnResult(
        np.vstack([p[0] for p in parts]),
        np.vstack([p[1] for p in parts]),
        approximate=True,
    )


def knn_search(
    query: np.ndarray,
    data: np.ndarray,
    k: int,
    metric: DistanceMetric,
    config: Optional[MatchingConfig] = None,
    approximate: Optional[bool] = None,
    token: Optional[CancelToken] = None,
) -> KnnResult:
    """Dispatch to exact or approximate search by problem size.

    Parameters
    ----------
    approximate : bool, optional
        Force a search mode. If None, approximate search is used when either
        point set is larger than ``config.approx_threshold``.
    """
    config = config or MatchingConfig()
    if approximate is None:
        approximate = max(len(query), len(data)) > config.approx_threshold

    if approximate:
        return approx_knn(
            query,
            data,
            k,
            metric=metric,
            n_trees=config.n_trees,
            search_k=config.search_k,
            random_seed=config.random_seed,
            chunk_size=config.chunk_size,
            n_jobs=config.n_jobs,
            token=token,
        )
    return exact_knn(
        query,
        data,
        k,
        metric=metric,
        chunk_size=config.chunk_size,
        n_jobs=config.n_jobs,
        token=token,
    )


def self_knn(
    points: np.ndarray,
    k: int,
    metric: DistanceMetric,
    config: Optional[MatchingConfig] = None,
    approximate: Optional[bool] = None,
) -> KnnResult:
    """k nearest neighbors of every point within its own set, excluding itself.

    Searches k + 1 neighbors and drops the point itself wherever it appears
    (duplicated points may push it out of first position).
    """
    n = len(points)
    k = min(k, n - 1)
    if k <= 0:
        return KnnResult(np.zeros((n, 0), dtype=np.int64), np.zeros((n, 0)))

    result = knn_search(points, points, k + 1, metric, config=config, approximate=approximate)
    own = np.arange(n)[:, None]
    indices: List[np.ndarray] = []
    distances: List[np.ndarray] = []
    for row in range(n):
        keep = result.indices[row] != own[row, 0]
        idx = result.indices[row][keep][:k]
        dist = result.distances[row][keep][:k]
        if len(idx) < k:
            idx = np.concatenate([idx, np.full(k - len(idx), -1, dtype=np.int64)])
            dist = np.concatenate([dist, np.full(k - len(dist), np.inf)])
        indices.append(idx)
        distances.append(dist)
    return KnnResult(np.vstack(indices), np.vstack(distances), approximate=result.approximate)
