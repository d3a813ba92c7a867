"""Configuration classes for classification.

Covers scoring, fine-tuning and pruning. All parameters can be loaded
from YAML.
"""

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

TIE_BREAKS = ("lexicographic", "reference_order")
PRUNING_MODES = ("outlier", "fixed", "margin")
OUTLIER_RULES = ("iqr", "mad")


@dataclass
class ScoringConfig:
    """Configuration for rank-correlation scoring.

    Attributes
    ----------
    quantile : float
        Quantile of per-profile correlations used as the label score
    min_genes : int
        Minimum usable marker genes for a label to be scored
    tie_break : str
        Rule for equal top scores: lexicographic (smallest label name) or
        reference_order (first label in the reference's label order)
    chunk_size : int
        Test samples per parallel work item
    n_workers : int
        Parallel worker processes (1 = in-process)
    """

    quantile: float = 0.8
    min_genes: int = 2
    tie_break: str = "lexicographic"
    chunk_size: int = 500
    n_workers: int = 1

    def __post_init__(self) -> None:
        if not 0.0 <= self.quantile <= 1.0:
            raise ValueError("quantile must be in [0, 1]")
        if self.min_genes < 2:
            raise ValueError("min_genes must be at least 2")
        if self.tie_break not in TIE_BREAKS:
            raise ValueError(f"tie_break must be one of {TIE_BREAKS}")
        if self.chunk_size < 1:
            raise ValueError("chunk_size must be positive")


@dataclass
class FineTuneConfig:
    """Configuration for iterative fine-tuning.

    Attributes
    ----------
    enabled : bool
        Run fine-tuning after the initial scoring
    margin : float
        Labels within this distance of the top score stay in contention
    max_iterations : int, optional
        Extra cap on iterations; the number of labels always bounds it
    """

    enabled: bool = True
    margin: float = 0.05
    max_iterations: Optional[int] = None

    def __post_init__(self) -> None:
        if self.margin < 0:
            raise ValueError("margin must be non-negative")
        if self.max_iterations is not None and self.max_iterations < 0:
            raise ValueError("max_iterations must be non-negative")


@dataclass
class PruningConfig:
    """Configuration for low-confidence pruning.

    Attributes
    ----------
    modes : List[str]
        Filters to apply (any combination of outlier, fixed, margin)
    outlier_rule : str
        iqr (below Q1 - k*IQR) or mad (below median - n*MAD)
    iqr_multiplier : float
        k for the IQR rule
    nmads : float
        n for the MAD rule
    delta_threshold : float
        Fixed minimum delta for the fixed mode
    margin_threshold : float
        Minimum post-tuning margin for the margin mode
    no_call_label : str
        Label written for pruned samples
    """

    modes: List[str] = field(default_factory=lambda: ["outlier"])
    outlier_rule: str = "iqr"
    iqr_multiplier: float = 1.5
    nmads: float = 3.0
    delta_threshold: float = 0.0
    margin_threshold: float = 0.05
    no_call_label: str = "Unassigned"

    def __post_init__(self) -> None:
        if isinstance(self.modes, str):
            self.modes = [self.modes]
        self.modes = [m.strip().lower().replace("-threshold", "").replace("-based", "")
                      for m in self.modes]
        unknown = [m for m in self.modes if m not in PRUNING_MODES]
        if unknown:
            raise ValueError(f"Unknown pruning modes {unknown} (expected {PRUNING_MODES})")
        if self.outlier_rule not in OUTLIER_RULES:
            raise ValueError(f"outlier_rule must be one of {OUTLIER_RULES}")


@dataclass
class ClassificationConfig:
    """Master configuration for classification.

    Attributes
    ----------
    scoring : ScoringConfig
        Scoring configuration
    fine_tune : FineTuneConfig
        Fine-tuning configuration
    pruning : PruningConfig
        Pruning configuration
    min_common_genes : int
        Fewer shared marker genes between reference and test is fatal
    """

    scoring: ScoringConfig = field(default_factory=ScoringConfig)
    fine_tune: FineTuneConfig = field(default_factory=FineTuneConfig)
    pruning: PruningConfig = field(default_factory=PruningConfig)
    min_common_genes: int = 20

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClassificationConfig":
        """Build configuration from a (possibly partial) dictionary."""
        data = data or {}
        return cls(
            scoring=ScoringConfig(**data.get("scoring", {})),
            fine_tune=FineTuneConfig(**data.get("fine_tune", {})),
            pruning=PruningConfig(**data.get("pruning", {})),
            min_common_genes=data.get("min_common_genes", 20),
        )

    @classmethod
    def from_yaml(cls, path: Path) -> "ClassificationConfig":
        """Load configuration from YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}

        # Handle nested classification section
        if "classification" in data:
            data = data["classification"]

        return cls.from_dict(data)

    @classmethod
    def default(cls) -> "ClassificationConfig":
        """Create default configuration."""
        return cls()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "scoring": asdict(self.scoring),
            "fine_tune": asdict(self.fine_tune),
            "pruning": asdict(self.pruning),
            "min_common_genes": self.min_common_genes,
        }
