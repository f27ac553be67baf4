"""Configuration classes for pairwise alignment.

All alignment parameters are configurable; the hashable parameter struct
(:class:`AlignmentParams`) is what keys the pairwise result cache.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union

from ..errors import InputError


class ComparisonSpace(str, Enum):
    """Shared coordinate system used to make two samples comparable."""

    PCA = "PCA"
    CPCA = "CPCA"
    CCA = "CCA"
    GENES = "Genes"

    @classmethod
    def parse(cls, value: Union[str, "ComparisonSpace"]) -> "ComparisonSpace":
        if isinstance(value, cls):
            return value
        for member in cls:
            if str(value).lower() == member.value.lower():
                return member
        raise InputError(
            f"Unknown comparison space '{value}'",
            {"valid": [m.value for m in cls]},
        )


class DistanceMetric(str, Enum):
    """Distance used for nearest-neighbor search in the comparison space."""

    ANGULAR = "angular"
    L2 = "L2"

    @classmethod
    def parse(cls, value: Union[str, "DistanceMetric"]) -> "DistanceMetric":
        if isinstance(value, cls):
            return value
        lowered = str(value).lower()
        if lowered in ("angular", "cosine"):
            return cls.ANGULAR
        if lowered in ("l2", "euclidean"):
            return cls.L2
        raise InputError(
            f"Unknown metric '{value}'", {"valid": [m.value for m in cls]}
        )


@dataclass(frozen=True)
class AlignmentParams:
    """Immutable parameter struct for one pairwise alignment.

    Two alignments with equal params (and equal samples and space) are the
    same cache entry.
    """

    k: int = 15
    ncomps: int = 30
    n_odgenes: int = 2000
    metric: str = DistanceMetric.ANGULAR.value
    var_scale: bool = True
    common_centering: bool = False
    min_shared_genes: int = 10
    min_components: int = 2
    cpca_max_iter: int = 100
    cpca_tol: float = 1e-8
    random_seed: int = 1337

    @property
    def param_hash(self) -> str:
        """Stable short hash of the parameter values."""
        payload = json.dumps(asdict(self), sort_keys=True, default=str)
        return hashlib.sha1(payload.encode("utf-8")).hexdigest()[:16]

    @property
    def distance_metric(self) -> DistanceMetric:
        return DistanceMetric.parse(self.metric)


@dataclass
class AlignmentConfig:
    """Configuration for pairwise alignment.

    Attributes
    ----------
    space : str
        Comparison space: PCA, CPCA, CCA or Genes
    k : int
        Neighbors per cell for inter-sample matching; each sample needs at
        least k cells
    ncomps : int
        Number of components of the joint embedding
    n_odgenes : int
        Over-dispersed genes taken from each sample's ranking
    metric : str
        angular or L2
    var_scale : bool
        Scale genes to unit pooled variance before embedding
    common_centering : bool
        Center on the pooled mean (True) or on each sample's own mean (False).
        Per-sample centering removes constant per-sample offsets.
    min_shared_genes : int
        Minimum number of selected shared genes
    min_components : int
        Minimum usable embedding components
    cpca_max_iter : int
        Iterations per component of the stepwise CPCA solver
    cpca_tol : float
        Convergence tolerance of the stepwise CPCA solver
    random_seed : int
        Seed for iterative solvers
    """

    space: str = ComparisonSpace.PCA.value
    k: int = 15
    ncomps: int = 30
    n_odgenes: int = 2000
    metric: str = DistanceMetric.ANGULAR.value
    var_scale: bool = True
    common_centering: bool = False
    min_shared_genes: int = 10
    min_components: int = 2
    cpca_max_iter: int = 100
    cpca_tol: float = 1e-8
    random_seed: int = 1337

    def __post_init__(self):
        self.space = ComparisonSpace.parse(self.space).value
        self.metric = DistanceMetric.parse(self.metric).value
        if self.k < 1:
            raise InputError("k must be >= 1", {"k": self.k})
        if self.ncomps < 1:
            raise InputError("ncomps must be >= 1", {"ncomps": self.ncomps})
        if self.n_odgenes < 1:
            raise InputError("n_odgenes must be >= 1", {"n_odgenes": self.n_odgenes})

    @property
    def comparison_space(self) -> ComparisonSpace:
        return ComparisonSpace.parse(self.space)

    def to_params(self, **overrides: Any) -> AlignmentParams:
        """Freeze the numeric parameters into a hashable struct."""
        values = {
            "k": self.k,
            "ncomps": self.ncomps,
            "n_odgenes": self.n_odgenes,
            "metric": self.metric,
            "var_scale": self.var_scale,
            "common_centering": self.common_centering,
            "min_shared_genes": self.min_shared_genes,
            "min_components": self.min_components,
            "cpca_max_iter": self.cpca_max_iter,
            "cpca_tol": self.cpca_tol,
            "random_seed": self.random_seed,
        }
        values.update(overrides)
        if "metric" in overrides:
            values["metric"] = DistanceMetric.parse(values["metric"]).value
        return AlignmentParams(**values)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "AlignmentConfig":
        return cls(**(data or {}))
