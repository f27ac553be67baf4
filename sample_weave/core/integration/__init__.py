"""Session orchestration module.

Example Usage
-------------
>>> from sample_weave.config import WeaveConfig
>>> from sample_weave.core.integration import IntegrationEngine
>>> engine = IntegrationEngine(registry, WeaveConfig.from_yaml("weave.yaml"))
>>> build = engine.build_graph(balance_factor="sample", alignment_strength=0.5)
>>> build.summary_dict()["graph"]["n_components"]
1
>>> result = engine.propagate_labels(seed_labels)
"""

from .engine import (
    AlignmentReport,
    GraphBuildResult,
    IntegrationEngine,
    PairFailure,
)

__all__ = [
    "AlignmentReport",
    "GraphBuildResult",
    "IntegrationEngine",
    "PairFailure",
]
