"""Reference training module.

Selects pairwise marker genes from a labeled reference and prepares the
profiles (individual samples or pseudo-bulk centroids) used for scoring.
The result is a TrainedReference that is built once and reused across
any number of test datasets.

Example Usage
-------------
>>> from celltype_transfer.core.reference import (
...     ReferenceBuilder, ReferenceConfig, MarkerConfig,
... )
>>> config = ReferenceConfig(markers=MarkerConfig(method="wilcoxon"))
>>> reference = ReferenceBuilder(config).build(ref_matrix, ref_labels)
"""

from .aggregation import (
    PseudoBulkProfile,
    ReferenceAggregator,
    aggregate_label,
    n_profiles_for,
)
from .config import (
    MARKER_METHODS,
    AggregationConfig,
    MarkerConfig,
    ReferenceConfig,
    canonical_method,
)
from .engine import ReferenceBuilder, TrainedReference
from .markers import MarkerSelector, MarkerSet, marker_count_for_labels

__all__ = [
    # Config
    "MARKER_METHODS",
    "AggregationConfig",
    "MarkerConfig",
    "ReferenceConfig",
    "canonical_method",
    # Markers
    "MarkerSelector",
    "MarkerSet",
    "marker_count_for_labels",
    # Aggregation
    "PseudoBulkProfile",
    "ReferenceAggregator",
    "aggregate_label",
    "n_profiles_for",
    # Engine
    "ReferenceBuilder",
    "TrainedReference",
]
