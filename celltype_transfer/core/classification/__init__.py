"""Classification module.

Scores test samples against a TrainedReference by quantile Spearman
correlation over marker genes, fine-tunes close calls on pairwise markers
and prunes low-confidence assignments.

Example Usage
-------------
>>> from celltype_transfer.core.classification import (
...     ClassificationEngine, ClassificationConfig,
... )
>>> engine = ClassificationEngine(ClassificationConfig())
>>> result = engine.classify(test_matrix, reference)
>>> result.write("output/")
"""

from .config import (
    ClassificationConfig,
    FineTuneConfig,
    PruningConfig,
    ScoringConfig,
)
from .engine import Assignment, ClassificationEngine, ClassificationResult
from .finetune import FineTuner, TuningResult
from .parallel import SampleRecord, run_chunks_parallel
from .pruning import Pruner, PruningResult, compute_deltas, flag_outliers
from .scoring import RankCorrelationScorer, ScoringContext, pick_best, scaled_ranks

__all__ = [
    # Config
    "ClassificationConfig",
    "FineTuneConfig",
    "PruningConfig",
    "ScoringConfig",
    # Scoring
    "RankCorrelationScorer",
    "ScoringContext",
    "pick_best",
    "scaled_ranks",
    # Fine-tuning
    "FineTuner",
    "TuningResult",
    # Pruning
    "Pruner",
    "PruningResult",
    "compute_deltas",
    "flag_outliers",
    # Engine
    "Assignment",
    "ClassificationEngine",
    "ClassificationResult",
    "SampleRecord",
    "run_chunks_parallel",
]
