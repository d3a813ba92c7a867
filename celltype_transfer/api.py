"""One-call annotation: train a reference and classify a test dataset."""

from __future__ import annotations

import logging
from typing import Any, Optional, Sequence

from .config import TransferConfig
from .core.classification import ClassificationEngine, ClassificationResult
from .core.reference import ReferenceBuilder
from .io.tables import as_expression_frame


def annotate(
    test: Any,
    reference_matrix: Any,
    labels: Sequence[Any],
    config: Optional[TransferConfig] = None,
    markers: Any = None,
    restrict: Optional[Sequence[str]] = None,
    logger: Optional[logging.Logger] = None,
) -> ClassificationResult:
    """Annotate test samples with labels transferred from a reference.

    The reference is restricted to the genes of the test data before
    marker selection, so every selected marker can be used for scoring.
    Build a reference with :class:`ReferenceBuilder` instead to reuse it
    across several test datasets.

    Args:
        test: Genes x samples DataFrame or AnnData (cells x genes)
        reference_matrix: Log-expression reference, same layouts as test
        labels: Label per reference sample
        config: Run configuration (defaults if None)
        markers: Precomputed markers; skips marker selection
        restrict: Gene whitelist applied to the reference
        logger: Logger shared by both engines

    Returns:
        ClassificationResult
    """
    config = config or TransferConfig()
    logger = logger or logging.getLogger(__name__)

    test_frame = as_expression_frame(test)
    reference = ReferenceBuilder(config.reference, logger=logger).build(
        reference_matrix,
        labels,
        markers=markers,
        test_genes=test_frame.index,
        restrict=restrict,
    )
    return ClassificationEngine(config.classification, logger=logger).classify(
        test_frame, reference
    )
