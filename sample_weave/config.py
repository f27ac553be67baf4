"""Master configuration for SampleWeave.

Combines the per-module dataclass configs and loads them from YAML. Both
nested sections and flat keys are accepted, and dotted names such as
``n.odgenes`` are aliases of the underscore names:

.. code-block:: yaml

    sample_weave:
      alignment:
        space: CPCA
        k: 15
      n.odgenes: 3000
      matching_method: mNN
      alignment_strength: 0.3
      n_workers: 4
"""

from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from .core.alignment import AlignmentConfig
from .core.errors import InputError
from .core.graph import GraphConfig
from .core.matching import MatchingConfig
from .core.propagation import PropagationConfig


@dataclass
class ParallelConfig:
    """Configuration for pair-level parallelism.

    Attributes
    ----------
    n_workers : int
        Threads aligning and matching distinct sample pairs
    pair_timeout : float, optional
        Seconds each pair may run before it is cancelled (None = no limit)
    """

    n_workers: int = 1
    pair_timeout: Optional[float] = None

    def __post_init__(self):
        if self.n_workers < 1:
            raise InputError("n_workers must be >= 1", {"n_workers": self.n_workers})
        if self.pair_timeout is not None and self.pair_timeout <= 0:
            raise InputError(
                "pair_timeout must be positive", {"pair_timeout": self.pair_timeout}
            )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)


SECTIONS = {
    "alignment": AlignmentConfig,
    "matching": MatchingConfig,
    "graph": GraphConfig,
    "propagation": PropagationConfig,
    "parallel": ParallelConfig,
}

# Flat keys that do not match a field name one-to-one
FLAT_ALIASES = {
    "method": ("propagation", "method"),
    "propagation_method": ("propagation", "method"),
    "seed": (None, "random_seed"),
}


def _normalize_key(key: Any) -> str:
    return str(key).strip().replace(".", "_").replace("-", "_")


def _section_fields(section: str):
    return {f.name for f in fields(SECTIONS[section])}


@dataclass
class WeaveConfig:
    """Master configuration for joint graph integration.

    Attributes
    ----------
    alignment : AlignmentConfig
        Comparison space and alignment parameters
    matching : MatchingConfig
        Neighbor search and matching parameters
    graph : GraphConfig
        Graph assembly and rebalancing parameters
    propagation : PropagationConfig
        Label propagation parameters
    parallel : ParallelConfig
        Worker pool and per-pair timeout
    """

    alignment: AlignmentConfig = field(default_factory=AlignmentConfig)
    matching: MatchingConfig = field(default_factory=MatchingConfig)
    graph: GraphConfig = field(default_factory=GraphConfig)
    propagation: PropagationConfig = field(default_factory=PropagationConfig)
    parallel: ParallelConfig = field(default_factory=ParallelConfig)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "WeaveConfig":
        """Build from nested sections and/or flat keys.

        When a parameter is given more than once, the last occurrence wins.

        Raises
        ------
        InputError
            On unknown keys or invalid values
        """
        data = dict(data or {})
        if "sample_weave" in data:
            data = dict(data["sample_weave"] or {})

        values: Dict[str, Dict[str, Any]] = {name: {} for name in SECTIONS}
        unknown = []

        for raw_key, value in data.items():
            key = _normalize_key(raw_key)
            if key in SECTIONS:
                if not isinstance(value, dict):
                    raise InputError(f"Section '{key}' must be a mapping")
                allowed = _section_fields(key)
                for sub_key, sub_value in value.items():
                    name = _normalize_key(sub_key)
                    if name not in allowed:
                        unknown.append(f"{key}.{sub_key}")
                        continue
                    values[key][name] = sub_value
                continue

            if key in FLAT_ALIASES:
                section, name = FLAT_ALIASES[key]
                targets = [section] if section else [s for s in SECTIONS if name in _section_fields(s)]
            else:
                name = key
                targets = [s for s in SECTIONS if key in _section_fields(s)]
            if not targets:
                unknown.append(str(raw_key))
                continue
            for section in targets:
                values[section][name] = value

        if unknown:
            raise InputError("Unknown configuration keys", {"keys": sorted(unknown)})

        try:
            return cls(
                alignment=AlignmentConfig(**values["alignment"]),
                matching=MatchingConfig(**values["matching"]),
                graph=GraphConfig(**values["graph"]),
                propagation=PropagationConfig(**values["propagation"]),
                parallel=ParallelConfig(**values["parallel"]),
            )
        except TypeError as exc:
            raise InputError(f"Invalid configuration: {exc}") from exc

    @classmethod
    def from_yaml(
        cls,
        path: Union[str, Path],
        overrides: Optional[Dict[str, Any]] = None,
    ) -> "WeaveConfig":
        """Load configuration from YAML file.

        ``overrides`` are flat keys applied after every value of the file
        (keys set to None are ignored).
        """
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise InputError("Configuration file must contain a mapping", {"path": str(path)})
        if "sample_weave" in data:
            data = data["sample_weave"] or {}
            if not isinstance(data, dict):
                raise InputError("'sample_weave' section must be a mapping", {"path": str(path)})
        data = dict(data)
        for key, value in (overrides or {}).items():
            if value is not None:
                data.pop(key, None)
                data[key] = value
        return cls.from_dict(data)

    @classmethod
    def default(cls) -> "WeaveConfig":
        """Create default configuration."""
        return cls()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "alignment": self.alignment.to_dict(),
            "matching": self.matching.to_dict(),
            "graph": self.graph.to_dict(),
            "propagation": self.propagation.to_dict(),
            "parallel": self.parallel.to_dict(),
        }

    def to_yaml(self, path: Union[str, Path]) -> Path:
        """Write configuration to a YAML file under a ``sample_weave`` section."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.safe_dump({"sample_weave": self.to_dict()}, f, sort_keys=False)
        return path
