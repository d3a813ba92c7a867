"""CellType-Transfer: reference-based cell-type annotation.

This package provides tools for:
- Pairwise marker selection from a labeled reference (median difference,
  rank-sum or t-test statistics)
- Optional pseudo-bulk aggregation of large single-cell references
- Quantile Spearman scoring of test samples on marker genes
- Iterative fine-tuning of close calls on pairwise markers
- Pruning of low-confidence assignments

Works the same for bulk references with a handful of samples per label and
single-cell references with thousands of cells.

Example usage:
    >>> from celltype_transfer import ReferenceBuilder, ClassificationEngine
    >>>
    >>> # Train once
    >>> reference = ReferenceBuilder().build(ref_matrix, ref_labels)
    >>>
    >>> # Classify any number of test datasets
    >>> result = ClassificationEngine().classify(test_matrix, reference)
    >>> result.labels["final_label"]
"""

__version__ = "0.1.0"

from .api import annotate
from .config import TransferConfig
from .core.classification import (
    ClassificationConfig,
    ClassificationEngine,
    ClassificationResult,
)
from .core.errors import (
    AnnotationError,
    GeneIndexMismatchError,
    InputShapeError,
    InsufficientReplicationWarning,
    InvalidMarkerSetError,
)
from .core.reference import (
    MarkerSet,
    ReferenceBuilder,
    ReferenceConfig,
    TrainedReference,
)

__all__ = [
    "__version__",
    "annotate",
    "TransferConfig",
    "ReferenceBuilder",
    "ReferenceConfig",
    "TrainedReference",
    "MarkerSet",
    "ClassificationConfig",
    "ClassificationEngine",
    "ClassificationResult",
    "AnnotationError",
    "GeneIndexMismatchError",
    "InputShapeError",
    "InsufficientReplicationWarning",
    "InvalidMarkerSetError",
]
