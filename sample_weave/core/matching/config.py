"""Configuration for nearest-neighbor search and inter-sample matching."""

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union

from ..errors import InputError


class MatchingMethod(str, Enum):
    """Which directional neighbor pairs become match edges."""

    MNN = "mNN"
    NN = "NN"

    @classmethod
    def parse(cls, value: Union[str, "MatchingMethod"]) -> "MatchingMethod":
        if isinstance(value, cls):
            return value
        for member in cls:
            if str(value).lower() == member.value.lower():
                return member
        raise InputError(
            f"Unknown matching method '{value}'", {"valid": [m.value for m in cls]}
        )


@dataclass
class MatchingConfig:
    """Configuration for inter-sample matching.

    Attributes
    ----------
    matching_method : str
        mNN keeps mutually nearest pairs only; NN keeps the union of both
        directional neighbor sets
    approx_threshold : int
        Use the Annoy approximate index when the larger sample of a pair has
        more cells than this; exact brute force otherwise
    n_trees : int
        Annoy trees per index
    search_k : int
        Annoy search_k (-1 lets Annoy pick n_trees * k)
    l2_sigma : float, optional
        Length scale of the L2 weight kernel exp(-d / sigma). If None, the
        median nonzero candidate distance of the pair is used.
    chunk_size : int
        Query cells per brute-force chunk
    n_jobs : int
        Threads for data-parallel query chunks
    random_seed : int
        Seed for the Annoy index
    """

    matching_method: str = MatchingMethod.MNN.value
    approx_threshold: int = 10000
    n_trees: int = 50
    search_k: int = -1
    l2_sigma: Optional[float] = None
    chunk_size: int = 2048
    n_jobs: int = 1
    random_seed: int = 1337

    def __post_init__(self):
        self.matching_method = MatchingMethod.parse(self.matching_method).value
        if self.l2_sigma is not None and self.l2_sigma <= 0:
            raise InputError("l2_sigma must be positive", {"l2_sigma": self.l2_sigma})
        if self.chunk_size < 1:
            raise InputError("chunk_size must be >= 1", {"chunk_size": self.chunk_size})

    @property
    def method(self) -> MatchingMethod:
        return MatchingMethod.parse(self.matching_method)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "MatchingConfig":
        return cls(**(data or {}))
