"""Core computational modules for SampleWeave.

This package contains the joint-graph engines:
- registry: Sample contract and read-only sample registry
- alignment: Pairwise alignment in a comparison space, plus the result cache
- matching: Exact/approximate nearest neighbors and mutual-neighbor matching
- graph: Joint graph assembly, rebalancing, community/layout contracts, merge trees
- propagation: Label propagation over the joint graph
- aggregation: Meta-cell count matrices per cluster
- integration: Session orchestrator tying the modules together
"""
