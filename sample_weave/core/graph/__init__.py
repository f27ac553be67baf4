"""Joint graph module.

Assembles the weighted cell graph spanning all samples, optionally rebalances
it over a cell factor, and exposes pluggable community detection, layout and
merge-tree construction on top of it.

Example Usage
-------------
>>> from sample_weave.core.graph import GraphAssembler, GraphConfig, rebalance
>>> graph = GraphAssembler(GraphConfig(k_self=10)).assemble(registry, matches)
>>> balanced = rebalance(graph, factor=cell_batches, strength=0.5)
>>> communities = detect_communities(balanced)
>>> tree = community_merge_tree(balanced, communities)
>>> tree.cut(3)
"""

from .config import GraphConfig, MergePolicy
from .joint_graph import JointGraph, merge_edges
from .assembler import GraphAssembler, sample_self_embedding
from .rebalance import level_shares, rebalance
from .interfaces import (
    CommunityDetector,
    ForceDirectedLayout,
    LayoutFunction,
    LeidenDetector,
    detect_communities,
    embed_graph,
)
from .merge_tree import MergeTree, community_connectivity, community_merge_tree

__all__ = [
    # Config
    "GraphConfig",
    "MergePolicy",
    # Graph
    "JointGraph",
    "merge_edges",
    "GraphAssembler",
    "sample_self_embedding",
    # Rebalancing
    "rebalance",
    "level_shares",
    # Communities and layout
    "CommunityDetector",
    "LayoutFunction",
    "LeidenDetector",
    "ForceDirectedLayout",
    "detect_communities",
    "embed_graph",
    # Merge trees
    "MergeTree",
    "community_connectivity",
    "community_merge_tree",
]
