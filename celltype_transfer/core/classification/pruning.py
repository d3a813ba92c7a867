"""Pruning of low-confidence assignments.

The confidence of an assignment is its delta: the pre-tuning score of the
assigned label minus the median pre-tuning score of the sample. A sample
that resembles every label equally (for example a cell type absent from
the reference) has a small delta.

Filters (composable):
- outlier: delta far below the other samples assigned the same label
  (Q1 - k*IQR, or median - n*MAD)
- fixed: delta below a fixed threshold
- margin: post-tuning margin below a fixed threshold
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from ...utils.stats import iqr_lower_fence, mad_lower_fence
from .config import PruningConfig


def compute_deltas(
    scores: np.ndarray,
    labels: Sequence[str],
    assigned: Sequence[Optional[str]],
) -> np.ndarray:
    """Assigned-label score minus the median score, per sample.

    Args:
        scores: Pre-tuning scores, samples x labels (NaN allowed)
        labels: Column labels of ``scores``
        assigned: Post-tuning label per sample (None for no label)

    Returns:
        Delta per sample; NaN when there is no label or no finite score
    """
    scores = np.asarray(scores, dtype=float)
    pos = {label: i for i, label in enumerate(labels)}
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", RuntimeWarning)
        medians = np.nanmedian(scores, axis=1) if scores.size else np.empty(0)

    deltas = np.full(scores.shape[0], np.nan)
    for i, label in enumerate(assigned):
        if label is None or label not in pos:
            continue
        deltas[i] = scores[i, pos[label]] - medians[i]
    return deltas


def flag_outliers(
    deltas: np.ndarray,
    assigned: Sequence[Optional[str]],
    rule: str = "iqr",
    iqr_multiplier: float = 1.5,
    nmads: float = 3.0,
) -> Tuple[np.ndarray, Dict[str, float]]:
    """Flag deltas below the lower fence of their assigned label.

    Groups with fewer than two finite deltas are never flagged.

    Returns:
        Tuple of (flags, fences) where fences maps label -> lower fence
    """
    deltas = np.asarray(deltas, dtype=float)
    assigned_arr = np.asarray([a if a is not None else "" for a in assigned], dtype=object)
    flags = np.zeros(deltas.shape[0], dtype=bool)
    fences: Dict[str, float] = {}

    for label in sorted(set(a for a in assigned if a is not None)):
        members = np.flatnonzero(assigned_arr == label)
        values = deltas[members]
        finite = np.isfinite(values)
        if finite.sum() < 2:
            continue
        if rule == "mad":
            fence = mad_lower_fence(values[finite], nmads)
        else:
            fence = iqr_lower_fence(values[finite], iqr_multiplier)
        fences[label] = fence
        flags[members[finite & (values < fence)]] = True
    return flags, fences


@dataclass
class PruningResult:
    """Pruning decisions for a batch of samples."""

    pruned: np.ndarray
    reasons: List[str]
    fences: Dict[str, float] = field(default_factory=dict)

    @property
    def n_pruned(self) -> int:
        return int(self.pruned.sum())


class Pruner:
    """Apply the configured pruning filters.

    Example:
        >>> pruner = Pruner(PruningConfig(modes=["outlier", "margin"]))
        >>> result = pruner.prune(deltas, assigned, margins)
        >>> result.n_pruned
    """

    def __init__(
        self,
        config: Optional[PruningConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or PruningConfig()
        self.logger = logger or logging.getLogger(__name__)

    def prune(
        self,
        deltas: np.ndarray,
        assigned: Sequence[Optional[str]],
        margins: Optional[np.ndarray] = None,
    ) -> PruningResult:
        """Decide which samples lose their label.

        Samples without a label or with a non-finite delta are always
        pruned. In margin mode a NaN margin (a single finite score) counts
        as too small.

        Args:
            deltas: Delta per sample
            assigned: Post-tuning label per sample
            margins: Post-tuning margin per sample (margin mode only)

        Returns:
            PruningResult with per-sample flags and ";"-joined reasons
        """
        cfg = self.config
        deltas = np.asarray(deltas, dtype=float)
        n = deltas.shape[0]
        reasons: List[List[str]] = [[] for _ in range(n)]

        for i, label in enumerate(assigned):
            if label is None:
                reasons[i].append("no_label")
            elif not np.isfinite(deltas[i]):
                reasons[i].append("no_delta")

        fences: Dict[str, float] = {}
        if "outlier" in cfg.modes:
            flags, fences = flag_outliers(
                deltas, assigned, cfg.outlier_rule, cfg.iqr_multiplier, cfg.nmads
            )
            for i in np.flatnonzero(flags):
                reasons[i].append("outlier")

        if "fixed" in cfg.modes:
            with np.errstate(invalid="ignore"):
                low = np.isfinite(deltas) & (deltas < cfg.delta_threshold)
            for i in np.flatnonzero(low):
                reasons[i].append("fixed")

        if "margin" in cfg.modes:
            if margins is None:
                raise ValueError("Margin pruning requires post-tuning margins")
            margins = np.asarray(margins, dtype=float)
            with np.errstate(invalid="ignore"):
                low = ~(margins >= cfg.margin_threshold)
            for i in np.flatnonzero(low):
                if assigned[i] is not None:
                    reasons[i].append("margin")

        pruned = np.asarray([bool(r) for r in reasons], dtype=bool)
        result = PruningResult(
            pruned=pruned,
            reasons=[";".join(r) for r in reasons],
            fences=fences,
        )
        self.logger.info(
            "Pruning (%s): %d of %d samples flagged",
            "+".join(cfg.modes),
            result.n_pruned,
            n,
        )
        return result
