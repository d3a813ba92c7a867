"""
Errors and warnings raised by the annotation core.

Each error carries a stable code so callers (and the CLI) can handle
failures programmatically.

Error Codes:
    E101_GENE_INDEX_MISMATCH: Too few genes shared between reference and test
    E102_INVALID_MARKER_SET: Marker input is malformed or names unknown labels
    E103_INPUT_SHAPE: Expression matrix and label vector do not line up
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class AnnotationError(Exception):
    """Base class for annotation failures.

    Attributes
    ----------
    message : str
        Human-readable error description
    error_code : str
        Machine-readable error code
    suggestion : str
        Actionable suggestion for fixing the error
    context : Dict[str, Any]
        Additional context for debugging
    """

    error_code: str = "E100_ANNOTATION"

    def __init__(
        self,
        message: str,
        suggestion: str = "",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.suggestion = suggestion
        self.context = context or {}

    def __str__(self) -> str:
        parts = [f"[{self.error_code}] {self.message}"]
        if self.suggestion:
            parts.append(f"  Suggestion: {self.suggestion}")
        return "\n".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "suggestion": self.suggestion,
            "context": self.context,
        }


class GeneIndexMismatchError(AnnotationError):
    """Reference and test share too few genes for a meaningful comparison."""

    error_code = "E101_GENE_INDEX_MISMATCH"

    def __init__(self, n_shared: int, min_required: int, **kwargs: Any):
        message = (
            f"Only {n_shared} genes shared between reference and test "
            f"(minimum {min_required})"
        )
        kwargs.setdefault(
            "suggestion",
            "Check that both datasets use the same gene identifiers "
            "(symbols vs. accessions) and species.",
        )
        super().__init__(message, **kwargs)
        self.n_shared = n_shared
        self.min_required = min_required


class InvalidMarkerSetError(AnnotationError):
    """Marker input cannot be interpreted."""

    error_code = "E102_INVALID_MARKER_SET"


class InputShapeError(AnnotationError):
    """Expression matrix, labels or gene identifiers are inconsistent."""

    error_code = "E103_INPUT_SHAPE"


class InsufficientReplicationWarning(UserWarning):
    """A label has too few samples for the requested marker test."""
