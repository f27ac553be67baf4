"""Exception taxonomy for SampleWeave.

Every error raised by the core derives from :class:`SampleWeaveError` and
optionally carries a ``context`` dictionary (sample ids, counts, parameter
values) that callers can log or serialize.

Recoverability:
    InputError, PropagationError: fatal for the call that raised them
    AlignmentError, MatchingError: recovered per pair by the integration engine
    GraphAssemblyError: raised when no usable graph can be built
"""

from typing import Any, Dict, Optional


class SampleWeaveError(Exception):
    """Base class for all SampleWeave errors.

    Parameters
    ----------
    message : str
        Human-readable error description
    context : Dict[str, Any], optional
        Additional context for debugging
    """

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = dict(context or {})

    def __str__(self) -> str:
        if not self.context:
            return self.message
        details = ", ".join(f"{k}={v}" for k, v in sorted(self.context.items()))
        return f"{self.message} ({details})"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error_type": type(self).__name__,
            "message": self.message,
            "context": {k: str(v) for k, v in self.context.items()},
        }


class InputError(SampleWeaveError):
    """Invalid input: malformed matrices, too few cells, mismatched genes."""


class DuplicateCellIdError(InputError):
    """Cell ids are not globally unique across registered samples."""


class AlignmentError(SampleWeaveError):
    """A sample pair could not be aligned in the requested space."""


class PairCancelledError(AlignmentError):
    """Pair computation was cancelled or ran past its deadline."""


class MatchingError(SampleWeaveError):
    """No mutual neighbors were found for a sample pair."""


class GraphAssemblyError(SampleWeaveError):
    """The joint graph would be empty or degenerate."""


class PropagationError(SampleWeaveError):
    """Label propagation cannot run (no seeds, empty graph)."""
