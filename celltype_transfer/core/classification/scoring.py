"""Rank-correlation scoring of test samples against a trained reference.

Each test sample is compared with every reference profile of a label by
Spearman correlation over marker genes. The label score is a high quantile
(default 0.8) of those correlations, which rewards labels with at least a
few closely matching profiles without being driven by a single one.

Spearman correlation is computed as the dot product of centred, unit-norm
average ranks, so reference profiles are ranked once per gene subset and
reused for every sample that needs the same subset.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from scipy import stats

from ..reference.engine import TrainedReference
from ..reference.markers import MarkerSet
from .config import ScoringConfig

# Ranked reference subsets kept per scorer
CACHE_SIZE = 256


def scaled_ranks(values: np.ndarray) -> np.ndarray:
    """Centred, unit-norm average ranks along the first axis.

    The Pearson correlation of two such vectors is their dot product, which
    equals the Spearman correlation of the original values. Constant
    columns have no ranks to correlate and come back as NaN.

    Parameters
    ----------
    values : np.ndarray
        1-D vector or 2-D matrix (genes x profiles)

    Returns
    -------
    np.ndarray
        Same shape as ``values``
    """
    values = np.asarray(values, dtype=float)
    one_d = values.ndim == 1
    if one_d:
        values = values[:, None]

    ranks = stats.rankdata(values, axis=0).astype(float)
    ranks -= ranks.mean(axis=0, keepdims=True)
    norm = np.sqrt(np.sum(ranks ** 2, axis=0))
    with np.errstate(divide="ignore", invalid="ignore"):
        scaled = ranks / norm
    scaled[:, ~(norm > 0)] = np.nan

    return scaled[:, 0] if one_d else scaled


def pick_best(
    scores: np.ndarray,
    labels: Sequence[str],
    tie_break: str = "lexicographic",
    order: Optional[Sequence[str]] = None,
) -> Optional[int]:
    """Index of the highest finite score.

    Args:
        scores: Score per label
        labels: Label names aligned with scores
        tie_break: "lexicographic" picks the smallest label name among
            equal maxima; "reference_order" picks the one seen first in
            ``order``
        order: Label order for "reference_order" (defaults to ``labels``)

    Returns:
        Position in ``labels``, or None when no score is finite
    """
    scores = np.asarray(scores, dtype=float)
    finite = np.isfinite(scores)
    if not finite.any():
        return None

    best = scores[finite].max()
    tied = [i for i in np.flatnonzero(finite) if scores[i] == best]
    if len(tied) == 1:
        return int(tied[0])

    if tie_break == "reference_order":
        rank = {label: i for i, label in enumerate(order if order else labels)}
        return int(min(tied, key=lambda i: (rank.get(labels[i], len(rank)), labels[i])))
    return int(min(tied, key=lambda i: labels[i]))


@dataclass
class ScoringContext:
    """Read-only data shared by every worker scoring one test dataset.

    Only numpy arrays and plain containers, so it pickles cheaply for
    process-based workers.
    """

    genes: List[str]  # Shared marker genes, reference order
    labels: List[str]
    profiles: Dict[str, np.ndarray]  # Label -> (n_genes, n_profiles)
    label_genes: Dict[str, np.ndarray]  # Label -> positions of own markers
    markers: MarkerSet
    excluded: Tuple[str, ...] = ()
    label_order: Tuple[str, ...] = ()
    quantile: float = 0.8
    min_genes: int = 2
    tie_break: str = "lexicographic"
    gene_index: Dict[str, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.gene_index:
            self.gene_index = {g: i for i, g in enumerate(self.genes)}

    @classmethod
    def from_reference(
        cls,
        reference: TrainedReference,
        genes: Sequence[str],
        config: Optional[ScoringConfig] = None,
    ) -> "ScoringContext":
        """Restrict a trained reference to the genes shared with a test set.

        Labels keeping fewer than ``config.min_genes`` of their own markers
        are excluded for every sample.
        """
        cfg = config or ScoringConfig()
        keep = set(str(g) for g in genes)
        ref_rows = {g: i for i, g in enumerate(reference.genes)}
        genes = [g for g in reference.genes if g in keep]
        rows = np.asarray([ref_rows[g] for g in genes], dtype=int)
        gene_index = {g: i for i, g in enumerate(genes)}

        profiles = {label: reference.profiles[label][rows] for label in reference.labels}
        label_genes = {
            label: np.asarray(
                sorted(gene_index[g] for g in reference.markers.per_label.get(label, ())
                       if g in gene_index),
                dtype=int,
            )
            for label in reference.labels
        }
        excluded = tuple(
            label for label in reference.labels if label_genes[label].size < cfg.min_genes
        )
        return cls(
            genes=genes,
            labels=list(reference.labels),
            profiles=profiles,
            label_genes=label_genes,
            markers=reference.markers.restrict(genes),
            excluded=excluded,
            label_order=reference.label_order or tuple(reference.labels),
            quantile=cfg.quantile,
            min_genes=cfg.min_genes,
            tie_break=cfg.tie_break,
            gene_index=gene_index,
        )

    def positions(self, genes) -> np.ndarray:
        """Sorted positions of ``genes`` in the shared gene list."""
        return np.asarray(
            sorted(self.gene_index[g] for g in genes if g in self.gene_index), dtype=int
        )


class RankCorrelationScorer:
    """Score samples by quantile Spearman correlation to reference profiles.

    Parameters
    ----------
    context : ScoringContext
        Shared reference data restricted to the test genes
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> context = ScoringContext.from_reference(reference, test.index)
    >>> scorer = RankCorrelationScorer(context)
    >>> scores = scorer.score(test_values[:, 0])
    """

    def __init__(
        self,
        context: ScoringContext,
        logger: Optional[logging.Logger] = None,
    ):
        self.context = context
        self.logger = logger or logging.getLogger(__name__)
        self._excluded = set(context.excluded)
        self._cache: Dict[Tuple[str, bytes], np.ndarray] = {}

    def _ranked_profiles(self, label: str, idx: np.ndarray) -> np.ndarray:
        key = (label, idx.tobytes())
        ranked = self._cache.get(key)
        if ranked is None:
            if len(self._cache) >= CACHE_SIZE:
                self._cache.pop(next(iter(self._cache)))
            ranked = scaled_ranks(self.context.profiles[label][idx])
            self._cache[key] = ranked
        return ranked

    def score(
        self,
        sample: np.ndarray,
        labels: Optional[Sequence[str]] = None,
        genes: Optional[np.ndarray] = None,
    ) -> np.ndarray:
        """Score one sample against a set of labels.

        Parameters
        ----------
        sample : np.ndarray
            Expression of the sample over ``context.genes``
        labels : Sequence[str], optional
            Labels to score (default: all reference labels)
        genes : np.ndarray, optional
            Positions of the genes to correlate over (default: all shared
            marker genes)

        Returns
        -------
        np.ndarray
            Score per label; NaN for excluded labels and degenerate cases
        """
        ctx = self.context
        labels = ctx.labels if labels is None else list(labels)
        out = np.full(len(labels), np.nan)

        sample = np.asarray(sample, dtype=float)
        usable = np.isfinite(sample)
        idx = np.arange(len(ctx.genes)) if genes is None else np.asarray(genes, dtype=int)
        idx = idx[usable[idx]]
        if idx.size < ctx.min_genes:
            return out

        x = scaled_ranks(sample[idx])
        if not np.isfinite(x).all():
            return out

        for i, label in enumerate(labels):
            if label in self._excluded:
                continue
            if np.count_nonzero(usable[ctx.label_genes[label]]) < ctx.min_genes:
                continue
            cors = x @ self._ranked_profiles(label, idx)
            cors = cors[np.isfinite(cors)]
            if cors.size:
                out[i] = float(np.quantile(np.clip(cors, -1.0, 1.0), ctx.quantile))
        return out

    def best(self, scores: np.ndarray, labels: Optional[Sequence[str]] = None) -> Optional[int]:
        """Position of the top-scoring label under the configured tie-break."""
        ctx = self.context
        return pick_best(
            scores,
            ctx.labels if labels is None else list(labels),
            ctx.tie_break,
            ctx.label_order,
        )
