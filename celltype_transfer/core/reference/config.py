"""Configuration classes for reference training.

Covers marker selection and the optional pseudo-bulk aggregation step.
All parameters can be loaded from YAML.
"""

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

MARKER_METHODS = ("classic", "wilcoxon", "t-test")

METHOD_ALIASES = {
    "rank-sum": "wilcoxon",
    "ranksum": "wilcoxon",
    "wilcox": "wilcoxon",
    "location-test": "t-test",
    "t": "t-test",
    "ttest": "t-test",
}


def canonical_method(method: str) -> str:
    """Resolve a marker method name or alias.

    Raises
    ------
    ValueError
        If the method is not recognised
    """
    name = str(method).strip().lower()
    name = METHOD_ALIASES.get(name, name)
    if name not in MARKER_METHODS:
        raise ValueError(
            f"Unknown marker method '{method}' (expected one of {MARKER_METHODS})"
        )
    return name


@dataclass
class MarkerConfig:
    """Configuration for pairwise marker selection.

    Attributes
    ----------
    method : str
        Per-gene statistic: classic, wilcoxon (rank-sum) or t-test
        (location test)
    n_markers : int, optional
        Markers kept per pairwise comparison. None uses the method default.
    base_markers : int
        C in the classic shrink schedule K(n) = round(C * r ** log2(n))
    shrink_ratio : float
        r in the classic shrink schedule
    test_markers : int
        Default markers per comparison for the test-based methods
    min_effect : float
        Minimum difference of means for t-test markers
    max_pvalue : float, optional
        Discard test-based markers with a larger p-value
    min_samples : int
        Samples per label required for the test-based methods
    n_workers : int
        Threads used to process label pairs
    """

    method: str = "classic"
    n_markers: Optional[int] = None
    base_markers: int = 500
    shrink_ratio: float = 2 / 3
    test_markers: int = 10
    min_effect: float = 0.0
    max_pvalue: Optional[float] = None
    min_samples: int = 2
    n_workers: int = 1

    def __post_init__(self) -> None:
        self.method = canonical_method(self.method)
        if self.n_markers is not None and self.n_markers < 1:
            raise ValueError("n_markers must be positive")
        if not 0 < self.shrink_ratio <= 1:
            raise ValueError("shrink_ratio must be in (0, 1]")
        if self.min_samples < 1:
            raise ValueError("min_samples must be at least 1")


@dataclass
class AggregationConfig:
    """Configuration for pseudo-bulk aggregation of the reference.

    Attributes
    ----------
    enabled : bool
        Replace per-sample reference profiles by k-means centroids
    power : float
        Number of profiles per label is ceil(N ** power)
    n_components : int
        Principal components used for clustering
    n_top_genes : int
        Most variable genes (within label) fed to the PCA
    n_init : int
        k-means restarts
    random_seed : int, optional
        Seed for PCA and k-means. None gives non-reproducible profiles.
    n_workers : int
        Parallel jobs across labels
    """

    enabled: bool = False
    power: float = 0.5
    n_components: int = 20
    n_top_genes: int = 1000
    n_init: int = 10
    random_seed: Optional[int] = None
    n_workers: int = 1

    def __post_init__(self) -> None:
        if not 0 < self.power <= 1:
            raise ValueError("power must be in (0, 1]")
        if self.n_components < 1:
            raise ValueError("n_components must be positive")


@dataclass
class ReferenceConfig:
    """Master configuration for reference training.

    Attributes
    ----------
    markers : MarkerConfig
        Marker selection configuration
    aggregation : AggregationConfig
        Pseudo-bulk aggregation configuration
    check_missing : bool
        Drop reference genes with non-finite values in any sample
    min_common_genes : int
        Minimum overlap with test genes when they are given at build time
    """

    markers: MarkerConfig = field(default_factory=MarkerConfig)
    aggregation: AggregationConfig = field(default_factory=AggregationConfig)
    check_missing: bool = True
    min_common_genes: int = 20

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReferenceConfig":
        """Build configuration from a (possibly partial) dictionary."""
        data = data or {}
        return cls(
            markers=MarkerConfig(**data.get("markers", {})),
            aggregation=AggregationConfig(**data.get("aggregation", {})),
            check_missing=data.get("check_missing", True),
            min_common_genes=data.get("min_common_genes", 20),
        )

    @classmethod
    def from_yaml(cls, path: Path) -> "ReferenceConfig":
        """Load configuration from YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}

        # Handle nested reference section
        if "reference" in data:
            data = data["reference"]

        return cls.from_dict(data)

    @classmethod
    def default(cls) -> "ReferenceConfig":
        """Create default configuration."""
        return cls()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "markers": asdict(self.markers),
            "aggregation": asdict(self.aggregation),
            "check_missing": self.check_missing,
            "min_common_genes": self.min_common_genes,
        }
