"""Iterative fine-tuning of provisional labels.

Labels whose initial score is close to the best one stay in contention.
Each iteration rescores the contenders on the markers that distinguish
them from each other only, and drops labels that fall out of the margin.
Restricting genes to the pairwise comparisons among close labels removes
the noise from markers that only separate them from labels already ruled
out.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .config import FineTuneConfig
from .scoring import RankCorrelationScorer


@dataclass(frozen=True)
class TuningResult:
    """Outcome of fine-tuning one sample.

    Attributes:
        label: Final label, None if the sample had no finite score
        margin: Best minus second-best score of the last computation with
            at least two finite scores (NaN if there was none)
        first: Best score of the last computation
        second: Second-best score of the last computation
        n_iterations: Rescoring rounds performed
        active_sizes: Size of the active label set, initial set first
        fallback: Per-label markers were used because no pairwise marker
            separated the survivors
    """

    label: Optional[str]
    margin: float = float("nan")
    first: float = float("nan")
    second: float = float("nan")
    n_iterations: int = 0
    active_sizes: Tuple[int, ...] = field(default_factory=tuple)
    fallback: bool = False


def top_two(scores: np.ndarray) -> Tuple[float, float]:
    """Largest and second-largest finite scores (NaN where missing)."""
    values = np.sort(np.asarray(scores, dtype=float)[np.isfinite(scores)])[::-1]
    first = float(values[0]) if values.size > 0 else float("nan")
    second = float(values[1]) if values.size > 1 else float("nan")
    return first, second


def within_margin(labels: Sequence[str], scores: np.ndarray, margin: float) -> List[str]:
    """Labels with a finite score no lower than max - margin."""
    scores = np.asarray(scores, dtype=float)
    finite = np.isfinite(scores)
    if not finite.any():
        return []
    cutoff = scores[finite].max() - margin
    return [label for label, s, ok in zip(labels, scores, finite) if ok and s >= cutoff]


class FineTuner:
    """Narrow the candidate labels of one sample until a single one is left.

    The loop stops when one label remains, when an iteration does not
    shrink the active set, or when the survivors share no pairwise markers
    (rescored once on their per-label markers). The number of iterations
    never exceeds the number of reference labels.

    Parameters
    ----------
    scorer : RankCorrelationScorer
        Scorer bound to the reference and test genes
    config : FineTuneConfig, optional
        Fine-tuning configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.
    """

    def __init__(
        self,
        scorer: RankCorrelationScorer,
        config: Optional[FineTuneConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.scorer = scorer
        self.config = config or FineTuneConfig()
        self.logger = logger or logging.getLogger(__name__)

    @property
    def max_iterations(self) -> int:
        n_labels = len(self.scorer.context.labels)
        if self.config.max_iterations is None:
            return n_labels
        return min(self.config.max_iterations, n_labels)

    def tune(self, sample: np.ndarray, scores: np.ndarray) -> TuningResult:
        """Fine-tune the label of one sample.

        Parameters
        ----------
        sample : np.ndarray
            Expression over the scorer's shared genes
        scores : np.ndarray
            Initial score per reference label; left unchanged

        Returns
        -------
        TuningResult
        """
        ctx = self.scorer.context
        labels = list(ctx.labels)
        scores = np.asarray(scores, dtype=float)

        best = self.scorer.best(scores, labels)
        if best is None:
            return TuningResult(label=None)

        first, second = top_two(scores)
        if not self.config.enabled:
            return TuningResult(
                label=labels[best], margin=first - second, first=first, second=second
            )

        margin = first - second
        active = within_margin(labels, scores, self.config.margin)
        sizes = [len(active)]
        last_labels, last_scores = labels, scores
        n_iterations = 0
        fallback = False

        while len(active) > 1 and n_iterations < self.max_iterations:
            idx = ctx.positions(ctx.markers.pairwise_genes(active))
            if idx.size < ctx.min_genes:
                # No pairwise information among survivors
                fallback = True
                idx = ctx.positions(ctx.markers.label_genes(active))
                if idx.size >= ctx.min_genes:
                    n_iterations += 1
                    rescored = self.scorer.score(sample, active, idx)
                    if np.isfinite(rescored).any():
                        last_labels, last_scores = active, rescored
                break

            rescored = self.scorer.score(sample, active, idx)
            n_iterations += 1
            if not np.isfinite(rescored).any():
                break
            last_labels, last_scores = active, rescored
            if np.isfinite(rescored).sum() >= 2:
                hi, lo = top_two(rescored)
                margin = hi - lo

            survivors = within_margin(active, rescored, self.config.margin)
            sizes.append(len(survivors))
            if len(survivors) == len(active):
                break
            active = survivors

        if fallback and np.isfinite(last_scores).sum() >= 2:
            hi, lo = top_two(last_scores)
            margin = hi - lo

        pos = self.scorer.best(last_scores, last_labels)
        first, second = top_two(last_scores)
        return TuningResult(
            label=last_labels[pos],
            margin=float(margin),
            first=first,
            second=second,
            n_iterations=n_iterations,
            active_sizes=tuple(sizes),
            fallback=fallback,
        )
