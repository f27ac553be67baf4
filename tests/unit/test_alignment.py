"""Unit tests for pairwise alignment and the result cache."""

import threading
import time

import numpy as np
import pytest

from sample_weave.core.alignment import (
    AlignmentConfig,
    AlignmentKey,
    CancelToken,
    ComparisonSpace,
    DistanceMetric,
    PairwiseAligner,
    PairwiseResultCache,
    preprocess_pair,
    select_pair_genes,
)
from sample_weave.core.errors import AlignmentError, InputError, PairCancelledError
from tests.fixtures import create_identity_copy, create_mock_sample


class TestAlignmentConfig:
    """Tests for AlignmentConfig."""

    def test_defaults(self):
        """Defaults match the documented values."""
        config = AlignmentConfig()
        assert config.space == "PCA"
        assert config.k == 15
        assert config.ncomps == 30
        assert config.n_odgenes == 2000
        assert config.metric == "angular"

    def test_space_and_metric_normalized(self):
        """Space and metric names are case-insensitive."""
        config = AlignmentConfig(space="cpca", metric="euclidean")
        assert config.space == "CPCA"
        assert config.metric == "L2"
        assert config.comparison_space == ComparisonSpace.CPCA

    def test_invalid_values(self):
        """Unknown spaces and non-positive k raise InputError."""
        with pytest.raises(InputError):
            AlignmentConfig(space="UMAP")
        with pytest.raises(InputError):
            AlignmentConfig(k=0)

    def test_param_hash_tracks_values(self):
        """Equal parameters hash equally; any change alters the hash."""
        base = AlignmentConfig().to_params()
        assert base.param_hash == AlignmentConfig().to_params().param_hash
        assert base.param_hash != AlignmentConfig(k=10).to_params().param_hash

    def test_key_is_order_independent(self):
        """(A, B) and (B, A) address the same cache entry."""
        params = AlignmentConfig().to_params()
        assert AlignmentKey.create("A", "B", "PCA", params) == AlignmentKey.create(
            "B", "A", "PCA", params
        )


class TestPreprocessing:
    """Tests for gene selection and centering."""

    def test_per_sample_centering_removes_offset(self):
        """A constant shift between samples vanishes after per-sample centering."""
        np.random.seed(0)
        xa = np.random.rand(20, 6)
        pa, pb = preprocess_pair(xa, xa + 3.0)
        np.testing.assert_allclose(pa, pb)

    def test_common_centering_keeps_offset(self):
        """Pooled centering leaves the shift between samples in place."""
        np.random.seed(0)
        xa = np.random.rand(20, 6)
        pa, pb = preprocess_pair(xa, xa + 3.0, var_scale=False, common_centering=True)
        np.testing.assert_allclose(pb - pa, 3.0)

    def test_zero_variance_genes_left_unscaled(self):
        """Constant genes do not produce NaN after scaling."""
        xa = np.ones((5, 3))
        pa, pb = preprocess_pair(xa, xa.copy())
        assert np.all(np.isfinite(pa))
        assert np.all(np.isfinite(pb))

    def test_select_pair_genes_uses_shared_genes(self):
        """Only genes measured by both samples are selected."""
        a = create_mock_sample("A", n_cells=10, n_genes=6)
        b = create_mock_sample("B", n_cells=10, n_genes=6, genes=["Gene0", "Gene1", "Gene2", "X0", "X1", "X2"])
        genes = select_pair_genes(a, b, n_odgenes=10)
        assert set(genes) == {"Gene0", "Gene1", "Gene2"}


class TestPairwiseAligner:
    """Tests for PairwiseAligner."""

    @pytest.mark.parametrize("space", ["PCA", "CPCA", "CCA", "Genes"])
    def test_every_space_produces_coordinates(self, batch_pair, space):
        """Each comparison space returns read-only coordinates for both samples."""
        sample_a, sample_b = batch_pair
        aligner = PairwiseAligner(AlignmentConfig(space=space, ncomps=10))
        alignment = aligner.align(sample_a, sample_b)

        assert alignment.space.value == space
        assert alignment.coords_a.shape[0] == sample_a.n_cells
        assert alignment.coords_b.shape[0] == sample_b.n_cells
        assert alignment.coords_a.shape[1] == alignment.coords_b.shape[1]
        assert np.all(np.isfinite(alignment.coords_a))
        assert not alignment.coords_a.flags.writeable
        if space == "Genes":
            assert alignment.n_components == 40
        else:
            assert alignment.n_components == 10

    def test_identity_copy_aligns_onto_itself(self):
        """A sample and a copy of it get identical PCA coordinates."""
        sample = create_mock_sample("A", n_cells=40, n_genes=30)
        copy = create_identity_copy(sample)
        alignment = PairwiseAligner(AlignmentConfig(space="PCA", k=1, ncomps=8)).align(sample, copy)
        np.testing.assert_allclose(alignment.coords_a, alignment.coords_b, atol=1e-8)

    def test_batch_offset_removed(self, batch_pair):
        """Per-sample centering makes shifted samples coincide in PCA space."""
        sample_a, sample_b = batch_pair
        alignment = PairwiseAligner(AlignmentConfig(ncomps=10)).align(sample_a, sample_b)
        np.testing.assert_allclose(alignment.coords_a, alignment.coords_b, atol=1e-8)

    def test_orientation_follows_call_order(self, batch_pair):
        """align(B, A) returns the cached alignment with the roles swapped."""
        sample_a, sample_b = batch_pair
        cache = PairwiseResultCache()
        aligner = PairwiseAligner(AlignmentConfig(space="Genes"), cache=cache)
        forward = aligner.align(sample_a, sample_b)
        backward = aligner.align(sample_b, sample_a)

        assert backward.sample_a == "B"
        np.testing.assert_array_equal(backward.coords_a, forward.coords_b)
        assert cache.n_computations == 1

    def test_repeat_alignment_is_cached(self, batch_pair):
        """A second request is served from the cache with identical data."""
        sample_a, sample_b = batch_pair
        cache = PairwiseResultCache()
        aligner = PairwiseAligner(AlignmentConfig(ncomps=10), cache=cache)
        first = aligner.align(sample_a, sample_b)
        second = aligner.align(sample_a, sample_b)

        assert first is second
        assert cache.n_computations == 1
        assert cache.stats()["hits"] == 1

    def test_different_params_are_separate_entries(self, batch_pair):
        """Changing a parameter produces a second cache entry."""
        sample_a, sample_b = batch_pair
        cache = PairwiseResultCache()
        aligner = PairwiseAligner(AlignmentConfig(ncomps=10), cache=cache)
        aligner.align(sample_a, sample_b)
        aligner.align(sample_a, sample_b, params=AlignmentConfig(ncomps=5).to_params())
        assert len(cache) == 2

    def test_too_few_cells(self):
        """Samples smaller than k cannot be aligned."""
        a = create_mock_sample("A", n_cells=5, n_genes=20)
        b = create_mock_sample("B", n_cells=30, n_genes=20)
        with pytest.raises(AlignmentError, match="fewer cells than k"):
            PairwiseAligner(AlignmentConfig(k=10)).align(a, b)

    def test_too_few_shared_genes(self, disjoint_sample):
        """Samples without shared genes cannot be aligned."""
        sample = create_mock_sample("A", n_cells=40, n_genes=40)
        with pytest.raises(AlignmentError, match="shared"):
            PairwiseAligner(AlignmentConfig(k=5)).align(sample, disjoint_sample)

    def test_too_few_components(self):
        """A pair supporting fewer than min_components components fails."""
        a = create_mock_sample("A", n_cells=20, n_genes=2)
        b = create_mock_sample("B", n_cells=20, n_genes=2, seed=3)
        config = AlignmentConfig(k=5, min_shared_genes=1, min_components=2)
        with pytest.raises(AlignmentError, match="components"):
            PairwiseAligner(config).align(a, b)

    def test_self_alignment_rejected(self):
        """A sample cannot be aligned with itself."""
        sample = create_mock_sample("A", n_cells=20, n_genes=10)
        with pytest.raises(AlignmentError):
            PairwiseAligner().align(sample, sample)

    def test_cancelled_token_leaves_no_entry(self, batch_pair):
        """A cancelled computation raises and writes nothing to the cache."""
        sample_a, sample_b = batch_pair
        cache = PairwiseResultCache()
        token = CancelToken(label="A|B")
        token.cancel()

        with pytest.raises(PairCancelledError, match="cancelled"):
            PairwiseAligner(cache=cache).align(sample_a, sample_b, token=token)
        assert len(cache) == 0
        assert cache.stats()["failures"] == 1

    def test_expired_deadline(self):
        """A token past its deadline reports a timeout."""
        token = CancelToken(timeout=1e-9, label="slow")
        time.sleep(0.01)
        assert token.cancelled
        with pytest.raises(PairCancelledError, match="timed out"):
            token.check("stage")


class TestPairwiseResultCache:
    """Tests for PairwiseResultCache."""

    def _key(self, a="A", b="B", space="PCA"):
        return AlignmentKey.create(a, b, space, AlignmentConfig().to_params())

    def test_compute_once(self):
        """The compute callable runs once per key."""
        cache = PairwiseResultCache()
        calls = []

        def compute():
            calls.append(1)
            return object()

        first = cache.get_or_compute(self._key(), compute)
        second = cache.get_or_compute(self._key(), compute)
        assert first is second
        assert len(calls) == 1
        assert cache.n_computations == 1

    def test_failure_leaves_no_entry(self):
        """A raising computation stores nothing and can be retried."""
        cache = PairwiseResultCache()

        def fail():
            raise AlignmentError("boom")

        with pytest.raises(AlignmentError):
            cache.get_or_compute(self._key(), fail)
        assert self._key() not in cache

        value = cache.get_or_compute(self._key(), lambda: "ok")
        assert value == "ok"
        assert cache.stats()["failures"] == 1

    def test_concurrent_requests_compute_once(self):
        """Threads racing on one key share a single computation."""
        cache = PairwiseResultCache()
        calls = []
        lock = threading.Lock()

        def slow_compute():
            with lock:
                calls.append(1)
            time.sleep(0.05)
            return "result"

        results = []

        def worker():
            results.append(cache.get_or_compute(self._key(), slow_compute))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(calls) == 1
        assert results == ["result"] * 8

    def test_insert_once(self):
        """insert refuses to overwrite an existing entry."""
        cache = PairwiseResultCache()
        assert cache.insert(self._key(), "first")
        assert not cache.insert(self._key(), "second")
        assert cache.get(self._key()) == "first"

    def test_invalidate_by_sample_and_space(self):
        """Invalidation can target one sample or one space."""
        cache = PairwiseResultCache()
        cache.insert(self._key("A", "B"), 1)
        cache.insert(self._key("A", "C"), 2)
        cache.insert(self._key("B", "C", space="CCA"), 3)

        assert cache.invalidate(space="CCA") == 1
        assert cache.invalidate(sample_id="B") == 1
        assert cache.keys() == [self._key("A", "C")]
        assert cache.clear() == 1
        assert len(cache) == 0

    def test_metric_parse(self):
        """Metric aliases resolve to the two supported metrics."""
        assert DistanceMetric.parse("cosine") == DistanceMetric.ANGULAR
        assert DistanceMetric.parse("l2") == DistanceMetric.L2
