"""Run-level configuration combining reference training and classification.

Example
-------
>>> from celltype_transfer.config import TransferConfig
>>> config = TransferConfig.from_yaml("annotate.yaml")
>>> config.reference.markers.method
'wilcoxon'
>>> config = TransferConfig.preset("single-cell")
>>> config.reference.aggregation.enabled
True
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from ..core.classification.config import ClassificationConfig
from ..core.reference.config import ReferenceConfig

# Partial configurations layered over the defaults
PRESETS: Dict[str, Dict[str, Any]] = {
    "default": {},
    "bulk": {
        "reference": {"markers": {"method": "classic"}},
    },
    "single-cell": {
        "reference": {
            "markers": {"method": "wilcoxon", "test_markers": 10},
            "aggregation": {"enabled": True, "random_seed": 0},
        },
    },
}

PRESET_ALIASES = {
    "sc": "single-cell",
    "single_cell": "single-cell",
    "singlecell": "single-cell",
    "microarray": "bulk",
}


def _merge(base: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge update into a copy of base."""
    merged = copy.deepcopy(base)
    for key, value in update.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


@dataclass
class TransferConfig:
    """Master configuration for an annotation run.

    Attributes
    ----------
    reference : ReferenceConfig
        Marker selection, aggregation and gene filtering
    classification : ClassificationConfig
        Scoring, fine-tuning and pruning
    """

    reference: ReferenceConfig = field(default_factory=ReferenceConfig)
    classification: ClassificationConfig = field(default_factory=ClassificationConfig)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "TransferConfig":
        """Build configuration from ``reference`` / ``classification`` sections."""
        data = data or {}
        unknown = sorted(set(data) - {"reference", "classification", "preset"})
        if unknown:
            raise ValueError(f"Unknown configuration sections: {', '.join(unknown)}")
        if data.get("preset"):
            base = PRESETS[resolve_preset(data["preset"])]
            data = _merge(base, {k: v for k, v in data.items() if k != "preset"})
        return cls(
            reference=ReferenceConfig.from_dict(data.get("reference") or {}),
            classification=ClassificationConfig.from_dict(data.get("classification") or {}),
        )

    @classmethod
    def from_yaml(cls, path: Path) -> "TransferConfig":
        """Load configuration from YAML file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data)

    @classmethod
    def preset(cls, name: str) -> "TransferConfig":
        """Create a configuration from a named preset."""
        return cls.from_dict(PRESETS[resolve_preset(name)])

    @classmethod
    def default(cls) -> "TransferConfig":
        """Create default configuration."""
        return cls()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "reference": self.reference.to_dict(),
            "classification": self.classification.to_dict(),
        }

    def to_yaml(self, path: Path) -> Path:
        """Write configuration to a YAML file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.safe_dump(self.to_dict(), f, sort_keys=False)
        return path


def resolve_preset(name: str) -> str:
    """Resolve a preset name or alias to its canonical name.

    Raises
    ------
    KeyError
        If the preset is unknown
    """
    key = name.strip().lower()
    key = PRESET_ALIASES.get(key, key)
    if key not in PRESETS:
        raise KeyError(
            f"Unknown preset '{name}'. Available: {', '.join(list_presets())}"
        )
    return key


def list_presets() -> List[str]:
    """Return sorted list of preset names."""
    return sorted(PRESETS)
