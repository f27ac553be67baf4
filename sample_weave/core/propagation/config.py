"""Configuration for label propagation."""

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union

from ..errors import InputError


class PropagationMethod(str, Enum):
    """Algorithm used to spread labels over the joint graph."""

    DIFFUSION = "diffusion"
    SOLVER = "solver"

    @classmethod
    def parse(cls, value: Union[str, "PropagationMethod"]) -> "PropagationMethod":
        if isinstance(value, cls):
            return value
        for member in cls:
            if str(value).lower() == member.value:
                return member
        raise InputError(
            f"Unknown propagation method '{value}'", {"valid": [m.value for m in cls]}
        )


def check_solver_clamping(method: PropagationMethod, fixed_initial_labels: bool) -> None:
    """The harmonic solver is defined only with seeds held fixed."""
    if method == PropagationMethod.SOLVER and not fixed_initial_labels:
        raise InputError(
            "The solver method requires fixed_initial_labels=True",
            {"method": method.value, "fixed_initial_labels": fixed_initial_labels},
        )


@dataclass
class PropagationConfig:
    """Configuration for label propagation.

    Attributes
    ----------
    method : str
        diffusion (iterative) or solver (harmonic function, sparse LU)
    fixed_initial_labels : bool
        Clamp seed cells to their one-hot distribution every iteration.
        The solver requires clamped seeds.
    max_iterations : int
        Diffusion iteration cap
    tolerance : float
        Stop when the largest absolute change of any single entry (one cell,
        one label) between two iterations falls below this
    """

    method: str = PropagationMethod.DIFFUSION.value
    fixed_initial_labels: bool = True
    max_iterations: int = 100
    tolerance: float = 1e-4

    def __post_init__(self):
        self.method = PropagationMethod.parse(self.method).value
        if self.max_iterations < 1:
            raise InputError(
                "max_iterations must be >= 1", {"max_iterations": self.max_iterations}
            )
        if self.tolerance <= 0:
            raise InputError("tolerance must be positive", {"tolerance": self.tolerance})
        check_solver_clamping(PropagationMethod.parse(self.method), self.fixed_initial_labels)

    @property
    def propagation_method(self) -> PropagationMethod:
        return PropagationMethod.parse(self.method)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PropagationConfig":
        return cls(**(data or {}))
