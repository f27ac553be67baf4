"""Unit tests for joint graph assembly, communities and layout."""

import numpy as np
import pandas as pd
import pytest
from scipy import sparse

from sample_weave.core.alignment import AlignmentConfig, PairwiseAligner
from sample_weave.core.errors import GraphAssemblyError, InputError
from sample_weave.core.graph import (
    CommunityDetector,
    ForceDirectedLayout,
    GraphAssembler,
    GraphConfig,
    JointGraph,
    LayoutFunction,
    LeidenDetector,
    MergePolicy,
    detect_communities,
    embed_graph,
    merge_edges,
    sample_self_embedding,
)
from sample_weave.core.matching import MutualNeighborMatcher, PairMatches
from sample_weave.core.registry import SampleRegistry
from tests.fixtures import create_mock_sample


def all_matches(registry):
    aligner = PairwiseAligner(AlignmentConfig(k=10, ncomps=10))
    matcher = MutualNeighborMatcher()
    return [
        matcher.match(aligner.align(registry[a], registry[b]))
        for a, b in registry.pairs()
    ]


class TestMergeEdges:
    """Tests for duplicate edge merging."""

    def test_max_policy(self):
        """Duplicate undirected edges keep the larger weight."""
        u, v, w = merge_edges(
            np.array([0, 1, 2]), np.array([1, 0, 2]), np.array([0.5, 0.3, 9.0]), MergePolicy.MAX
        )
        np.testing.assert_array_equal(u, [0])
        np.testing.assert_array_equal(v, [1])
        np.testing.assert_allclose(w, [0.5])

    def test_sum_policy(self):
        """Duplicate undirected edges add up under the sum policy."""
        _, _, w = merge_edges(np.array([0, 1]), np.array([1, 0]), np.array([0.5, 0.3]), "sum")
        np.testing.assert_allclose(w, [0.8])

    def test_directed_keeps_orientation(self):
        """Directed merging treats (u, v) and (v, u) as different edges."""
        u, v, _ = merge_edges(
            np.array([0, 1]), np.array([1, 0]), np.array([0.5, 0.3]), directed=True
        )
        assert list(zip(u, v)) == [(0, 1), (1, 0)]

    def test_input_order_irrelevant(self):
        """Shuffling the edge list does not change the merged result."""
        np.random.seed(0)
        rows = np.random.randint(0, 10, 200)
        cols = np.random.randint(0, 10, 200)
        weights = np.random.rand(200)
        perm = np.random.permutation(200)
        for policy in ("max", "sum"):
            first = merge_edges(rows, cols, weights, policy)
            second = merge_edges(rows[perm], cols[perm], weights[perm], policy)
            for a, b in zip(first, second):
                np.testing.assert_allclose(a, b)


class TestJointGraph:
    """Tests for the JointGraph container."""

    def _graph(self):
        return JointGraph.from_edges(
            nodes=["a0", "a1", "b0", "b1"],
            node_samples=["A", "A", "B", "B"],
            rows=np.array([0, 0, 2]),
            cols=np.array([1, 2, 3]),
            weights=np.array([0.2, 0.9, 0.4]),
        )

    def test_symmetric_adjacency(self):
        """Undirected graphs store both directions."""
        graph = self._graph()
        adjacency = graph.adjacency
        assert (adjacency != adjacency.T).nnz == 0
        assert graph.n_edges == 3
        assert graph.adjacency[0, 2] == pytest.approx(0.9)

    def test_nodes_read_only(self):
        """Node arrays cannot be modified."""
        graph = self._graph()
        with pytest.raises(ValueError):
            graph.nodes[0] = "x"

    def test_adjacency_is_copied(self):
        """The graph does not alias the caller's matrix."""
        matrix = sparse.csr_matrix(np.array([[0.0, 1.0], [1.0, 0.0]]))
        graph = JointGraph(["x", "y"], ["A", "B"], matrix)
        matrix.data[:] = 5.0
        assert graph.adjacency[0, 1] == 1.0

    def test_edge_and_node_tables(self):
        """Edge table lists each undirected edge once with its kind."""
        graph = self._graph()
        edges = graph.edge_table()
        assert len(edges) == 3
        assert set(edges["kind"]) == {"intra", "inter"}
        inter = edges[edges["kind"] == "inter"].iloc[0]
        assert (inter["source"], inter["target"]) == ("a0", "b0")

        nodes = graph.node_table()
        assert nodes.loc["a0", "degree"] == 2
        assert nodes.loc["a0", "weighted_degree"] == pytest.approx(1.1)

    def test_positions_and_components(self):
        """Unknown cells map to -1; all four nodes form one component."""
        graph = self._graph()
        np.testing.assert_array_equal(graph.positions(["b1", "zz"]), [3, -1])
        n_components, _ = graph.connected_components()
        assert n_components == 1

    def test_summary(self):
        """Summary counts inter and intra edges."""
        summary = self._graph().summary_dict()
        assert summary["n_nodes"] == 4
        assert summary["n_inter_edges"] == 1
        assert summary["n_intra_edges"] == 2
        assert summary["n_isolated"] == 0

    def test_invalid_construction(self):
        """Mismatched shapes and duplicate nodes raise GraphAssemblyError."""
        with pytest.raises(GraphAssemblyError):
            JointGraph(["a", "b"], ["A"], sparse.csr_matrix((2, 2)))
        with pytest.raises(GraphAssemblyError):
            JointGraph(["a", "b"], ["A", "A"], sparse.csr_matrix((3, 3)))
        with pytest.raises(GraphAssemblyError):
            JointGraph(["a", "a"], ["A", "A"], sparse.csr_matrix((2, 2)))

    def test_undirected_requires_symmetric_adjacency(self):
        """Asymmetric weights are only accepted on directed graphs."""
        matrix = sparse.csr_matrix(np.array([[0.0, 1.0], [0.5, 0.0]]))
        with pytest.raises(GraphAssemblyError, match="asymmetric"):
            JointGraph(["x", "y"], ["A", "B"], matrix)
        assert JointGraph(["x", "y"], ["A", "B"], matrix, directed=True).n_edges == 2

    def test_symmetrized(self):
        """Directed graphs symmetrize to (W + W^T) / 2."""
        directed = JointGraph(
            ["x", "y"], ["A", "B"], sparse.csr_matrix(np.array([[0.0, 1.0], [0.0, 0.0]])), directed=True
        )
        undirected = directed.symmetrized()
        assert not undirected.directed
        assert undirected.adjacency[1, 0] == pytest.approx(0.5)


class TestGraphAssembler:
    """Tests for GraphAssembler."""

    def test_every_cell_is_a_node(self, three_sample_registry):
        """Nodes follow registry order and cover every cell."""
        graph = GraphAssembler().assemble(three_sample_registry, all_matches(three_sample_registry))
        assert graph.n_nodes == three_sample_registry.n_cells
        assert list(graph.nodes) == list(three_sample_registry.cell_index().index)
        assert graph.adjacency.diagonal().sum() == 0

    def test_match_order_irrelevant(self, three_sample_registry):
        """Assembling matches in a different order gives the same graph."""
        matches = all_matches(three_sample_registry)
        assembler = GraphAssembler()
        first = assembler.assemble(three_sample_registry, matches)
        second = assembler.assemble(three_sample_registry, list(reversed(matches)))
        assert (first.adjacency != second.adjacency).nnz == 0

    def test_inter_and_intra_edges(self, three_sample_registry):
        """The graph carries both intra- and inter-sample edges."""
        graph = GraphAssembler().assemble(three_sample_registry, all_matches(three_sample_registry))
        summary = graph.summary_dict()
        assert summary["n_inter_edges"] > 0
        assert summary["n_intra_edges"] > 0

    def test_intra_weights_scaled(self, three_sample_registry):
        """Intra-sample weights are scaled by k_self_weight."""
        sample = three_sample_registry["S0"]
        _, _, w_full = GraphAssembler(GraphConfig(k_self_weight=1.0)).intra_edges(sample)
        _, _, w_scaled = GraphAssembler(GraphConfig(k_self_weight=0.1)).intra_edges(sample)
        np.testing.assert_allclose(w_scaled, 0.1 * w_full)

    def test_intra_edges_disabled(self, three_sample_registry):
        """k_self=0 yields no intra-sample edges."""
        rows, _, _ = GraphAssembler(GraphConfig(k_self=0)).intra_edges(three_sample_registry["S0"])
        assert len(rows) == 0

    def test_same_factor_downweight(self, three_sample_registry):
        """Inter edges between samples sharing a factor level are scaled down."""
        matches = all_matches(three_sample_registry)
        plain = GraphAssembler(GraphConfig(k_self=0)).assemble(three_sample_registry, matches)
        damped = GraphAssembler(
            GraphConfig(k_self=0, sample_factor="batch", same_factor_downweight=0.5)
        ).assemble(three_sample_registry, matches)

        # S0 and S2 share batch b0
        plain_edges = plain.edge_table().set_index(["source", "target"])["weight"]
        damped_edges = damped.edge_table().set_index(["source", "target"])["weight"]
        same = [
            key for key in plain_edges.index
            if key[0].startswith("S0") and key[1].startswith("S2")
        ]
        assert same
        np.testing.assert_allclose(damped_edges.loc[same], 0.5 * plain_edges.loc[same])

    def test_single_sample_graph(self):
        """A registry with one sample gives its intra-sample graph."""
        registry = SampleRegistry([create_mock_sample("A", n_cells=30, n_genes=20)])
        graph = GraphAssembler().assemble(registry, [])
        assert graph.n_nodes == 30
        assert graph.summary_dict()["n_inter_edges"] == 0

    def test_empty_registry(self):
        """An empty registry cannot be assembled."""
        with pytest.raises(GraphAssemblyError):
            GraphAssembler().assemble(SampleRegistry(), [])

    def test_no_edges(self):
        """No matches and no intra edges raise GraphAssemblyError."""
        registry = SampleRegistry([create_mock_sample("A", n_cells=10, n_genes=5)])
        with pytest.raises(GraphAssemblyError, match="no edges"):
            GraphAssembler(GraphConfig(k_self=0)).assemble(registry, [])

    def test_unknown_sample_in_matches(self, three_sample_registry):
        """Matches naming an unregistered sample are rejected."""
        bogus = PairMatches(
            sample_a="S0",
            sample_b="ghost",
            cells_a=np.array([0]),
            cells_b=np.array([0]),
            distances=np.array([0.1]),
            weights=np.array([0.9]),
            n_cells_a=50,
            n_cells_b=1,
        )
        with pytest.raises(GraphAssemblyError, match="unknown sample"):
            GraphAssembler().assemble(three_sample_registry, [bogus])

    def test_self_embedding_prefers_supplied(self):
        """A supplied embedding is used for the intra-sample graph."""
        sample = create_mock_sample("A", n_cells=20, n_genes=10, with_embedding=True)
        np.testing.assert_array_equal(sample_self_embedding(sample), sample.embedding)

    def test_invalid_config(self):
        """Bad policies and strengths raise InputError."""
        with pytest.raises(InputError):
            GraphConfig(merge_policy="min")
        with pytest.raises(InputError):
            GraphConfig(alignment_strength=1.5)


class TestCommunitiesAndLayout:
    """Tests for the community detection and layout seams."""

    def test_custom_detector(self, three_component_graph):
        """Any callable returning a full partition is accepted."""

        def by_sample(graph):
            return pd.Series(graph.node_samples, index=graph.nodes)

        assert isinstance(by_sample, CommunityDetector)
        communities = detect_communities(three_component_graph, by_sample)
        assert set(communities.unique()) == {"A", "B"}
        assert communities.name == "community"

    def test_incomplete_partition_rejected(self, three_component_graph):
        """Detectors leaving nodes unassigned raise GraphAssemblyError."""

        def partial(graph):
            return pd.Series("0", index=graph.nodes[:5])

        with pytest.raises(GraphAssemblyError, match="unassigned"):
            detect_communities(three_component_graph, partial)

    def test_leiden_respects_components(self, three_component_graph):
        """Leiden never joins disconnected rings into one community."""
        communities = detect_communities(three_component_graph, LeidenDetector(resolution=0.5))
        assert len(communities) == three_component_graph.n_nodes
        _, components = three_component_graph.connected_components()
        frame = pd.DataFrame({"community": communities.to_numpy(), "component": components})
        assert (frame.groupby("community")["component"].nunique() == 1).all()
        assert communities.nunique() >= 3

    def test_custom_layout(self, three_component_graph):
        """Layouts returning coordinates for every node pass through."""

        def circle(graph, **params):
            angles = np.linspace(0, 2 * np.pi, graph.n_nodes, endpoint=False)
            return pd.DataFrame(
                {"dim1": np.cos(angles), "dim2": np.sin(angles)}, index=graph.nodes
            )

        assert isinstance(circle, LayoutFunction)
        coords = embed_graph(three_component_graph, circle)
        assert coords.shape == (three_component_graph.n_nodes, 2)

    def test_layout_with_missing_nodes(self, three_component_graph):
        """Layouts leaving nodes unplaced raise GraphAssemblyError."""

        def broken(graph, **params):
            return pd.DataFrame({"dim1": [0.0], "dim2": [0.0]}, index=graph.nodes[:1])

        with pytest.raises(GraphAssemblyError, match="unplaced"):
            embed_graph(three_component_graph, broken)

    def test_force_directed_layout(self, three_component_graph):
        """The default layout places every node with finite coordinates."""
        coords = embed_graph(three_component_graph, ForceDirectedLayout(random_seed=0))
        assert list(coords.columns) == ["dim1", "dim2"]
        assert np.all(np.isfinite(coords.to_numpy()))
