"""Immutable alignment results and their cache keys."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Dict, Mapping, Tuple

import numpy as np

from .config import AlignmentParams, ComparisonSpace, DistanceMetric


@dataclass(frozen=True)
class AlignmentKey:
    """Cache key of one pairwise alignment.

    The sample pair is stored in sorted order so that (A, B) and (B, A)
    address the same entry.
    """

    sample_a: str
    sample_b: str
    space: ComparisonSpace
    param_hash: str

    @classmethod
    def create(
        cls,
        sample_a: str,
        sample_b: str,
        space: ComparisonSpace,
        params: AlignmentParams,
    ) -> "AlignmentKey":
        first, second = sorted([str(sample_a), str(sample_b)])
        return cls(first, second, ComparisonSpace.parse(space), params.param_hash)

    def involves(self, sample_id: str) -> bool:
        return sample_id in (self.sample_a, self.sample_b)

    def __str__(self) -> str:
        return f"{self.sample_a}|{self.sample_b}|{self.space.value}|{self.param_hash}"


def _frozen_array(values: np.ndarray) -> np.ndarray:
    array = np.array(values, dtype=np.float64, copy=True)
    array.setflags(write=False)
    return array


@dataclass(frozen=True)
class PairAlignment:
    """Joint coordinates of two samples in one comparison space.

    Attributes
    ----------
    sample_a, sample_b : str
        Sample ids; rows of coords_a / coords_b follow each sample's cell order
    space : ComparisonSpace
        Comparison space used
    params : AlignmentParams
        Parameters the alignment was computed with
    coords_a, coords_b : np.ndarray
        Read-only coordinates (cells x components)
    genes : Tuple[str, ...]
        Genes the alignment was computed on
    metrics : Mapping[str, Any]
        Quality metrics of the joint embedding
    """

    sample_a: str
    sample_b: str
    space: ComparisonSpace
    params: AlignmentParams
    coords_a: np.ndarray
    coords_b: np.ndarray
    genes: Tuple[str, ...] = ()
    metrics: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def build(
        cls,
        sample_a: str,
        sample_b: str,
        space: ComparisonSpace,
        params: AlignmentParams,
        coords_a: np.ndarray,
        coords_b: np.ndarray,
        genes: Tuple[str, ...],
        metrics: Dict[str, Any],
    ) -> "PairAlignment":
        """Create an alignment with read-only copies of the coordinates."""
        return cls(
            sample_a=sample_a,
            sample_b=sample_b,
            space=space,
            params=params,
            coords_a=_frozen_array(coords_a),
            coords_b=_frozen_array(coords_b),
            genes=tuple(genes),
            metrics=MappingProxyType(dict(metrics)),
        )

    @property
    def key(self) -> AlignmentKey:
        return AlignmentKey.create(self.sample_a, self.sample_b, self.space, self.params)

    @property
    def metric(self) -> DistanceMetric:
        return self.params.distance_metric

    @property
    def n_components(self) -> int:
        return self.coords_a.shape[1]

    def oriented(self, first_sample: str) -> "PairAlignment":
        """Return this alignment with ``first_sample`` as sample_a."""
        if first_sample == self.sample_a:
            return self
        if first_sample != self.sample_b:
            raise KeyError(f"Sample '{first_sample}' is not part of this alignment")
        return replace(
            self,
            sample_a=self.sample_b,
            sample_b=self.sample_a,
            coords_a=self.coords_b,
            coords_b=self.coords_a,
        )

    def summary_dict(self) -> Dict[str, Any]:
        """Return summary dictionary for JSON export."""
        return {
            "sample_a": self.sample_a,
            "sample_b": self.sample_b,
            "space": self.space.value,
            "param_hash": self.params.param_hash,
            "n_genes": len(self.genes),
            "n_components": self.n_components,
            "metrics": dict(self.metrics),
        }
