"""Unit tests for neighbor search and mutual-neighbor matching."""

import numpy as np
import pytest

from sample_weave.core.alignment import (
    AlignmentConfig,
    CancelToken,
    ComparisonSpace,
    DistanceMetric,
    PairAlignment,
)
from sample_weave.core.errors import InputError, MatchingError, PairCancelledError
from sample_weave.core.matching import (
    MatchingConfig,
    MutualNeighborMatcher,
    approx_knn,
    distance_to_weight,
    exact_knn,
    knn_search,
    median_nonzero,
    pairwise_distances,
    self_knn,
)


def make_alignment(coords_a, coords_b, metric="angular", k=5):
    params = AlignmentConfig(k=k, metric=metric).to_params()
    return PairAlignment.build(
        sample_a="A",
        sample_b="B",
        space=ComparisonSpace.PCA,
        params=params,
        coords_a=coords_a,
        coords_b=coords_b,
        genes=(),
        metrics={},
    )


@pytest.fixture
def points():
    np.random.seed(0)
    return np.random.normal(size=(40, 6))


class TestNeighborSearch:
    """Tests for exact and approximate kNN."""

    def test_angular_distance_range(self, points):
        """Angular distances lie in [0, 2] and are 0 on identical points."""
        d = pairwise_distances(points, points, DistanceMetric.ANGULAR)
        assert d.min() >= 0
        assert d.max() <= 2 + 1e-12
        np.testing.assert_allclose(np.diag(d), 0.0, atol=1e-6)

    def test_exact_knn_sorted(self, points):
        """Neighbors are sorted by distance."""
        result = exact_knn(points, points, k=5, metric=DistanceMetric.L2)
        assert result.k == 5
        assert np.all(np.diff(result.distances, axis=1) >= 0)
        np.testing.assert_array_equal(result.indices[:, 0], np.arange(len(points)))

    def test_chunking_does_not_change_results(self, points):
        """Chunked, threaded search equals a single-chunk search."""
        single = exact_knn(points, points, k=4, chunk_size=1000)
        chunked = exact_knn(points, points, k=4, chunk_size=7, n_jobs=2)
        np.testing.assert_array_equal(single.indices, chunked.indices)
        np.testing.assert_allclose(single.distances, chunked.distances)

    def test_ties_broken_by_lower_index(self):
        """Equidistant neighbors are ordered by index."""
        data = np.array([[1.0, 0.0], [1.0, 0.0], [1.0, 0.0]])
        result = exact_knn(np.array([[1.0, 0.0]]), data, k=3)
        np.testing.assert_array_equal(result.indices[0], [0, 1, 2])

    def test_k_capped_at_data_size(self, points):
        """Asking for more neighbors than points returns all points."""
        result = exact_knn(points[:3], points[:4], k=10)
        assert result.k == 4

    def test_approximate_finds_identical_points(self, points):
        """The Annoy index recovers exact duplicates."""
        result = approx_knn(points, points, k=3, n_trees=20)
        assert result.approximate
        hit_rate = np.mean(result.indices[:, 0] == np.arange(len(points)))
        assert hit_rate >= 0.95

    def test_dispatch_by_threshold(self, points):
        """knn_search switches to Annoy above approx_threshold."""
        config = MatchingConfig(approx_threshold=10)
        assert knn_search(points, points, 3, DistanceMetric.ANGULAR, config).approximate
        assert not knn_search(points[:5], points[:5], 3, DistanceMetric.ANGULAR, config).approximate

    def test_self_knn_excludes_self(self, points):
        """Self search never returns the query point."""
        result = self_knn(points, 5, DistanceMetric.L2)
        assert result.k == 5
        for row in range(len(points)):
            assert row not in result.indices[row]

    def test_cancelled_search(self, points):
        """A cancelled token stops the search."""
        token = CancelToken()
        token.cancel()
        with pytest.raises(PairCancelledError):
            exact_knn(points, points, k=3, token=token)


class TestWeights:
    """Tests for distance to weight conversion."""

    def test_angular_weights(self):
        """Angular weight is 1 - d/2."""
        w = distance_to_weight(np.array([0.0, 1.0, 2.0]), DistanceMetric.ANGULAR)
        np.testing.assert_allclose(w, [1.0, 0.5, 0.0])

    def test_l2_weights(self):
        """L2 weight is exp(-d / sigma)."""
        w = distance_to_weight(np.array([0.0, 2.0]), DistanceMetric.L2, sigma=2.0)
        np.testing.assert_allclose(w, [1.0, np.exp(-1.0)])

    def test_l2_needs_sigma(self):
        """L2 weights without a sigma raise ValueError."""
        with pytest.raises(ValueError):
            distance_to_weight(np.array([1.0]), DistanceMetric.L2)

    def test_median_nonzero(self):
        """Zero and infinite distances are ignored."""
        assert median_nonzero(np.array([0.0, 1.0, 3.0, np.inf])) == 2.0
        assert median_nonzero(np.array([0.0])) == 1.0


class TestMutualNeighborMatcher:
    """Tests for MutualNeighborMatcher."""

    def test_identical_sets_match_one_to_one(self, points):
        """With k=1, identical point sets match every cell to its twin."""
        matches = MutualNeighborMatcher().match(make_alignment(points, points.copy(), k=1))
        assert matches.n_matches == len(points)
        np.testing.assert_array_equal(matches.cells_a, matches.cells_b)
        np.testing.assert_allclose(matches.weights, 1.0, atol=1e-6)
        assert matches.matched_fraction == 1.0

    def test_nn_is_superset_of_mnn(self, points):
        """The NN union contains every mutual pair."""
        np.random.seed(1)
        other = points + np.random.normal(scale=0.5, size=points.shape)
        alignment = make_alignment(points, other, k=3)
        mnn = MutualNeighborMatcher(MatchingConfig(matching_method="mNN")).match(alignment)
        nn = MutualNeighborMatcher(MatchingConfig(matching_method="NN")).match(alignment)

        mnn_pairs = set(zip(mnn.cells_a, mnn.cells_b))
        nn_pairs = set(zip(nn.cells_a, nn.cells_b))
        assert mnn_pairs <= nn_pairs
        assert nn.n_matches > mnn.n_matches
        assert nn.method == "NN"

    def test_output_sorted_and_deterministic(self, points):
        """Matches are sorted by (a, b) and identical across runs."""
        np.random.seed(2)
        other = points + np.random.normal(scale=0.3, size=points.shape)
        alignment = make_alignment(points, other, k=4)
        first = MutualNeighborMatcher().match(alignment)
        second = MutualNeighborMatcher().match(alignment)

        codes = first.cells_a * len(other) + first.cells_b
        assert np.all(np.diff(codes) > 0)
        np.testing.assert_array_equal(first.cells_a, second.cells_a)
        np.testing.assert_array_equal(first.weights, second.weights)

    def test_l2_uses_median_sigma(self, points):
        """L2 matching defaults sigma to the median candidate distance."""
        np.random.seed(3)
        other = points + np.random.normal(scale=0.3, size=points.shape)
        matches = MutualNeighborMatcher().match(make_alignment(points, other, metric="L2", k=3))
        assert matches.sigma is not None and matches.sigma > 0
        assert np.all((matches.weights > 0) & (matches.weights <= 1))

    def test_l2_fixed_sigma(self, points):
        """A configured sigma is used as given."""
        matches = MutualNeighborMatcher(MatchingConfig(l2_sigma=0.7)).match(
            make_alignment(points, points.copy(), metric="L2", k=1)
        )
        assert matches.sigma == 0.7

    def test_no_matches_raises(self):
        """Opposite points give zero angular weight and no matches."""
        alignment = make_alignment(np.array([[1.0, 0.0]]), np.array([[-1.0, 0.0]]), k=1)
        with pytest.raises(MatchingError):
            MutualNeighborMatcher().match(alignment)

    def test_approximate_matching(self, points):
        """Forcing approximate search still pairs identical points."""
        matches = MutualNeighborMatcher().match(
            make_alignment(points, points.copy(), k=1), approximate=True
        )
        assert matches.metadata["approximate"]
        assert matches.matched_fraction_a >= 0.9

    def test_to_frame_with_ids(self, points):
        """to_frame resolves local indices to cell ids."""
        matches = MutualNeighborMatcher().match(make_alignment(points, points.copy(), k=1))
        ids_a = [f"a{i}" for i in range(len(points))]
        ids_b = [f"b{i}" for i in range(len(points))]
        frame = matches.to_frame(ids_a, ids_b)
        assert list(frame.columns[:2]) == ["cell_a", "cell_b"]
        assert frame.loc[0, "cell_a"] == "a0"
        assert frame.loc[0, "cell_b"] == "b0"

    def test_invalid_config(self):
        """Unknown methods and non-positive sigma raise InputError."""
        with pytest.raises(InputError):
            MatchingConfig(matching_method="kNN")
        with pytest.raises(InputError):
            MatchingConfig(l2_sigma=0)
