"""Configuration for joint graph assembly and rebalancing."""

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union

from ..errors import InputError


class MergePolicy(str, Enum):
    """How duplicate edges between the same two cells are combined."""

    MAX = "max"
    SUM = "sum"

    @classmethod
    def parse(cls, value: Union[str, "MergePolicy"]) -> "MergePolicy":
        if isinstance(value, cls):
            return value
        for member in cls:
            if str(value).lower() == member.value:
                return member
        raise InputError(
            f"Unknown merge policy '{value}'", {"valid": [m.value for m in cls]}
        )


@dataclass
class GraphConfig:
    """Configuration for graph assembly.

    Attributes
    ----------
    k_self : int
        Intra-sample nearest neighbors per cell (0 disables intra edges)
    k_self_weight : float
        Multiplier applied to intra-sample edge weights
    self_ncomps : int
        Components of the per-sample PCA used when a sample has no embedding
    self_n_odgenes : int
        Over-dispersed genes used for that per-sample PCA
    merge_policy : str
        max or sum
    same_factor_downweight : float
        Multiplier for inter-sample edges between samples that share a level
        of ``sample_factor`` (1.0 leaves them unchanged)
    sample_factor : str, optional
        Sample metadata key read for same_factor_downweight
    alignment_strength : float
        Rebalancing strength in [0, 1]
    balance_factor : str, optional
        Cell-level factor to rebalance on; ``"sample"`` uses sample membership
    """

    k_self: int = 10
    k_self_weight: float = 0.1
    self_ncomps: int = 30
    self_n_odgenes: int = 2000
    merge_policy: str = MergePolicy.MAX.value
    same_factor_downweight: float = 1.0
    sample_factor: Optional[str] = None
    alignment_strength: float = 0.0
    balance_factor: Optional[str] = None

    def __post_init__(self):
        self.merge_policy = MergePolicy.parse(self.merge_policy).value
        if self.k_self < 0:
            raise InputError("k_self must be >= 0", {"k_self": self.k_self})
        if self.k_self_weight < 0:
            raise InputError(
                "k_self_weight must be >= 0", {"k_self_weight": self.k_self_weight}
            )
        if self.same_factor_downweight <= 0:
            raise InputError(
                "same_factor_downweight must be positive",
                {"same_factor_downweight": self.same_factor_downweight},
            )
        if not 0.0 <= self.alignment_strength <= 1.0:
            raise InputError(
                "alignment_strength must be in [0, 1]",
                {"alignment_strength": self.alignment_strength},
            )

    @property
    def policy(self) -> MergePolicy:
        return MergePolicy.parse(self.merge_policy)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "GraphConfig":
        return cls(**(data or {}))
