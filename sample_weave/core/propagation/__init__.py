"""Label propagation module.

Spreads a partial cell labeling over the joint graph and reports a label
distribution, hard label and uncertainty for every cell.

Example Usage
-------------
>>> from sample_weave.core.propagation import LabelPropagationEngine, PropagationConfig
>>> engine = LabelPropagationEngine(PropagationConfig(method="diffusion", max_iterations=50))
>>> result = engine.propagate(graph, seed_labels)
>>> result.to_frame().head()
"""

from .config import PropagationConfig, PropagationMethod
from .engine import LabelPropagationEngine, PropagationResult

__all__ = [
    "PropagationConfig",
    "PropagationMethod",
    "LabelPropagationEngine",
    "PropagationResult",
]
