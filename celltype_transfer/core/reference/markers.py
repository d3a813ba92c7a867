"""Pairwise marker selection for reference-based annotation.

For every ordered pair of reference labels (A, B) the genes most strongly
upregulated in A relative to B are selected. The per-label marker set is
the union of A's markers against every other label; the pairwise form is
kept so fine-tuning can restrict itself to comparisons between the labels
still in contention.

Supported statistics:
- classic: difference of per-label medians
- wilcoxon: one-sided Mann-Whitney U test across samples
- t-test: one-sided Welch t-test with a minimum effect size
"""

from __future__ import annotations

import logging
import time
import warnings
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

import numpy as np
import pandas as pd
from scipy import stats

from ..errors import InputShapeError, InsufficientReplicationWarning, InvalidMarkerSetError
from .config import MarkerConfig


def marker_count_for_labels(
    n_labels: int,
    base: float = 500,
    ratio: float = 2 / 3,
) -> int:
    """Markers per pairwise comparison for the classic method.

    K(n) = round(base * ratio ** log2(n)): fewer markers are taken per
    comparison as the number of labels grows.

    Args:
        n_labels: Number of distinct reference labels
        base: Marker count for a single label
        ratio: Shrink factor per doubling of the label count

    Returns:
        Number of markers (at least 1)
    """
    n = max(int(n_labels), 1)
    return max(int(round(base * ratio ** np.log2(n))), 1)


@dataclass(frozen=True)
class MarkerSet:
    """Marker genes per label, optionally per label pair.

    Treat as read-only once built; it is shared by every classification
    run that uses the reference.

    Attributes:
        per_label: Label -> marker genes (union over all comparisons)
        pairwise: Label A -> label B -> genes up in A vs B, or None for
            per-label-only marker sets
        method: Statistic that produced the markers ("custom" if supplied)
        unreliable_pairs: (A, B) pairs where no reliable marker could be
            derived
    """

    per_label: Dict[str, Tuple[str, ...]]
    pairwise: Optional[Dict[str, Dict[str, Tuple[str, ...]]]] = None
    method: str = "custom"
    unreliable_pairs: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)

    @classmethod
    def from_pairwise(
        cls,
        pairwise: Mapping[str, Mapping[str, Iterable[str]]],
        method: str = "custom",
        unreliable_pairs: Iterable[Tuple[str, str]] = (),
    ) -> "MarkerSet":
        """Build from a nested label -> label -> genes mapping."""
        source: Dict[str, Dict[str, Any]] = {}
        for a, inner in pairwise.items():
            if not isinstance(inner, Mapping):
                raise InvalidMarkerSetError(
                    f"Pairwise markers for '{a}' must map other labels to genes"
                )
            source[str(a)] = {str(b): genes for b, genes in inner.items()}

        labels = sorted(set(source) | {b for inner in source.values() for b in inner})
        nested: Dict[str, Dict[str, Tuple[str, ...]]] = {}
        for a in labels:
            inner = source.get(a, {})
            nested[a] = {}
            for b in labels:
                if b == a:
                    continue
                genes = inner.get(b, ())
                if isinstance(genes, str):
                    raise InvalidMarkerSetError(
                        f"Markers for ({a}, {b}) must be a list of genes, got a string"
                    )
                nested[a][b] = _dedupe(genes)

        per_label = {
            a: _dedupe(g for b in sorted(nested[a]) for g in nested[a][b])
            for a in labels
        }
        return cls(
            per_label=per_label,
            pairwise=nested,
            method=method,
            unreliable_pairs=tuple((str(a), str(b)) for a, b in unreliable_pairs),
        )

    @classmethod
    def from_per_label(
        cls,
        per_label: Mapping[str, Iterable[str]],
        method: str = "custom",
    ) -> "MarkerSet":
        """Build from a label -> genes mapping (no pairwise information)."""
        result: Dict[str, Tuple[str, ...]] = {}
        for label in sorted(per_label, key=str):
            genes = per_label[label]
            if isinstance(genes, str):
                raise InvalidMarkerSetError(
                    f"Markers for '{label}' must be a list of genes, got a string"
                )
            result[str(label)] = _dedupe(genes)
        return cls(per_label=result, pairwise=None, method=method)

    @classmethod
    def coerce(cls, markers: Any) -> "MarkerSet":
        """Accept a MarkerSet, a pairwise mapping or a per-label mapping."""
        if isinstance(markers, MarkerSet):
            return markers
        if not isinstance(markers, Mapping) or not markers:
            raise InvalidMarkerSetError(
                "Markers must be a non-empty mapping or MarkerSet",
                suggestion="Use {label: [genes]} or {label: {other_label: [genes]}}",
            )
        if "per_label" in markers or "pairwise" in markers:
            return cls.from_dict(markers)

        values = list(markers.values())
        if all(isinstance(v, Mapping) for v in values):
            return cls.from_pairwise(markers)
        if any(isinstance(v, Mapping) for v in values):
            raise InvalidMarkerSetError(
                "Marker mapping mixes pairwise and per-label entries"
            )
        return cls.from_per_label(markers)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MarkerSet":
        """Inverse of :meth:`to_dict`."""
        method = data.get("method", "custom")
        unreliable = [tuple(p) for p in data.get("unreliable_pairs", [])]
        if data.get("pairwise"):
            return cls.from_pairwise(data["pairwise"], method, unreliable)
        if data.get("per_label"):
            return cls.from_per_label(data["per_label"], method)
        raise InvalidMarkerSetError("Marker dictionary has no 'pairwise' or 'per_label' entry")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to plain dictionary for YAML/JSON export."""
        out: Dict[str, Any] = {
            "method": self.method,
            "per_label": {k: list(v) for k, v in self.per_label.items()},
        }
        if self.pairwise is not None:
            out["pairwise"] = {
                a: {b: list(g) for b, g in inner.items()}
                for a, inner in self.pairwise.items()
            }
        if self.unreliable_pairs:
            out["unreliable_pairs"] = [list(p) for p in self.unreliable_pairs]
        return out

    @property
    def labels(self) -> List[str]:
        return sorted(self.per_label)

    @property
    def is_pairwise(self) -> bool:
        return self.pairwise is not None

    @property
    def n_genes(self) -> int:
        return len(self.all_genes())

    def all_genes(self, order: Optional[Sequence[str]] = None) -> List[str]:
        """Union of all markers.

        Args:
            order: Gene order to follow (e.g. the reference gene index).
                Genes absent from ``order`` are dropped. Sorted if None.
        """
        union: Set[str] = {g for genes in self.per_label.values() for g in genes}
        if order is None:
            return sorted(union)
        return [g for g in order if g in union]

    def pairwise_genes(self, labels: Sequence[str]) -> Set[str]:
        """Union of pairwise markers among ``labels`` only."""
        if self.pairwise is None:
            return set()
        genes: Set[str] = set()
        for a in labels:
            inner = self.pairwise.get(a, {})
            for b in labels:
                if a != b:
                    genes.update(inner.get(b, ()))
        return genes

    def label_genes(self, labels: Sequence[str]) -> Set[str]:
        """Union of per-label markers for ``labels``."""
        genes: Set[str] = set()
        for label in labels:
            genes.update(self.per_label.get(label, ()))
        return genes

    def restrict(self, genes: Iterable[str]) -> "MarkerSet":
        """Return a copy keeping only markers in ``genes``."""
        keep = set(genes)
        if self.pairwise is not None:
            pairwise = {
                a: {b: tuple(g for g in gl if g in keep) for b, gl in inner.items()}
                for a, inner in self.pairwise.items()
            }
            per_label = {
                a: tuple(g for g in gl if g in keep) for a, gl in self.per_label.items()
            }
            return MarkerSet(per_label, pairwise, self.method, self.unreliable_pairs)
        return MarkerSet(
            {a: tuple(g for g in gl if g in keep) for a, gl in self.per_label.items()},
            None,
            self.method,
            self.unreliable_pairs,
        )

    def to_per_label(self) -> "MarkerSet":
        """Drop pairwise information, keeping the per-label unions."""
        return MarkerSet(dict(self.per_label), None, self.method, self.unreliable_pairs)

    def to_frame(self) -> pd.DataFrame:
        """Long table of markers (label, versus, rank, gene)."""
        records: List[Dict[str, Any]] = []
        if self.pairwise is not None:
            for a, inner in self.pairwise.items():
                for b, genes in inner.items():
                    for rank, gene in enumerate(genes, start=1):
                        records.append({"label": a, "versus": b, "rank": rank, "gene": gene})
        else:
            for a, genes in self.per_label.items():
                for rank, gene in enumerate(genes, start=1):
                    records.append({"label": a, "versus": None, "rank": rank, "gene": gene})
        return pd.DataFrame.from_records(records, columns=["label", "versus", "rank", "gene"])


def _dedupe(genes: Iterable[Any]) -> Tuple[str, ...]:
    seen: Dict[str, None] = {}
    for gene in genes:
        seen.setdefault(str(gene), None)
    return tuple(seen)


@dataclass
class _PairResult:
    label: str
    versus: str
    genes: Tuple[str, ...]
    unreliable: bool = False
    fallback: bool = False


class MarkerSelector:
    """Select pairwise marker genes from a labeled reference.

    Parameters
    ----------
    config : MarkerConfig, optional
        Marker configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> selector = MarkerSelector(MarkerConfig(method="wilcoxon"))
    >>> markers = selector.select(ref_matrix, ref_labels)
    >>> markers.pairwise["B cell"]["T cell"][:3]
    """

    def __init__(
        self,
        config: Optional[MarkerConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or MarkerConfig()
        self.logger = logger or logging.getLogger(__name__)

    def n_markers(self, n_labels: int) -> int:
        """Markers kept per comparison for the configured method."""
        cfg = self.config
        if cfg.n_markers is not None:
            return cfg.n_markers
        if cfg.method == "classic":
            return marker_count_for_labels(n_labels, cfg.base_markers, cfg.shrink_ratio)
        return cfg.test_markers

    def select(
        self,
        matrix: pd.DataFrame,
        labels: Sequence[str],
    ) -> MarkerSet:
        """Select markers for every ordered pair of labels.

        Parameters
        ----------
        matrix : pd.DataFrame
            Log-expression, genes x samples (index = gene identifiers)
        labels : Sequence[str]
            Label per sample (column)

        Returns
        -------
        MarkerSet
            Pairwise marker set

        Raises
        ------
        InputShapeError
            If labels do not match the number of samples or fewer than
            two labels are present
        """
        labels_arr = np.asarray([str(x) for x in labels])
        if labels_arr.shape[0] != matrix.shape[1]:
            raise InputShapeError(
                f"{labels_arr.shape[0]} labels for {matrix.shape[1]} reference samples"
            )
        unique_labels = sorted(set(labels_arr))
        if len(unique_labels) < 2:
            raise InputShapeError("Marker selection needs at least two labels")

        cfg = self.config
        k = self.n_markers(len(unique_labels))
        genes = np.asarray(matrix.index.astype(str))
        values = matrix.to_numpy(dtype=float)

        groups = {lab: values[:, labels_arr == lab] for lab in unique_labels}
        sizes = {lab: groups[lab].shape[1] for lab in unique_labels}
        medians = {lab: np.median(groups[lab], axis=1) for lab in unique_labels}

        under_replicated = sorted(
            lab for lab in unique_labels if sizes[lab] < cfg.min_samples
        )
        if cfg.method != "classic" and under_replicated:
            message = (
                f"Labels with fewer than {cfg.min_samples} samples cannot be tested "
                f"with '{cfg.method}'; falling back to median differences for: "
                f"{', '.join(under_replicated)}"
            )
            self.logger.warning(message)
            warnings.warn(message, InsufficientReplicationWarning, stacklevel=2)

        pairs = [(a, b) for a in unique_labels for b in unique_labels if a != b]
        self.logger.info(
            "Selecting markers (method=%s, top_n=%d): %d labels, %d pairs, %d genes",
            cfg.method,
            k,
            len(unique_labels),
            len(pairs),
            len(genes),
        )
        start = time.time()

        def process_pair(pair: Tuple[str, str]) -> _PairResult:
            a, b = pair
            if cfg.method == "classic" or a in under_replicated or b in under_replicated:
                result = self._classic_pair(a, b, medians, genes, k)
                result.fallback = cfg.method != "classic"
                return result
            return self._tested_pair(a, b, groups, genes, k)

        if cfg.n_workers > 1:
            with ThreadPoolExecutor(max_workers=cfg.n_workers) as executor:
                results = list(executor.map(process_pair, pairs))
        else:
            results = [process_pair(p) for p in pairs]

        pairwise: Dict[str, Dict[str, Tuple[str, ...]]] = {lab: {} for lab in unique_labels}
        unreliable: List[Tuple[str, str]] = []
        for res in results:
            pairwise[res.label][res.versus] = res.genes
            if res.unreliable:
                unreliable.append((res.label, res.versus))

        if unreliable:
            self.logger.warning(
                "No reliable markers for %d label pairs (all-zero median profile): %s",
                len(unreliable),
                ", ".join(f"{a} vs {b}" for a, b in unreliable[:10]),
            )

        marker_set = MarkerSet.from_pairwise(pairwise, cfg.method, unreliable)
        self.logger.info(
            "Marker selection completed in %.1f seconds: %d unique marker genes",
            time.time() - start,
            marker_set.n_genes,
        )
        return marker_set

    def _classic_pair(
        self,
        a: str,
        b: str,
        medians: Dict[str, np.ndarray],
        genes: np.ndarray,
        k: int,
    ) -> _PairResult:
        """Top-k genes by median difference."""
        med_a, med_b = medians[a], medians[b]
        if not np.any(med_a) or not np.any(med_b):
            return _PairResult(a, b, (), unreliable=True)

        diff = med_a - med_b
        candidates = np.flatnonzero(diff > 0)
        order = np.lexsort((candidates, -diff[candidates]))
        chosen = candidates[order][:k]
        return _PairResult(a, b, tuple(genes[chosen]))

    def _tested_pair(
        self,
        a: str,
        b: str,
        groups: Dict[str, np.ndarray],
        genes: np.ndarray,
        k: int,
    ) -> _PairResult:
        """Top-k genes by one-sided test p-value."""
        cfg = self.config
        x, y = groups[a], groups[b]

        with warnings.catch_warnings(), np.errstate(divide="ignore", invalid="ignore"):
            warnings.simplefilter("ignore", RuntimeWarning)
            if cfg.method == "wilcoxon":
                res = stats.mannwhitneyu(x, y, alternative="greater", axis=1)
                effect = np.asarray(res.statistic, dtype=float) / (x.shape[1] * y.shape[1])
                keep = effect > 0.5
            else:
                res = stats.ttest_ind(x, y, axis=1, equal_var=False, alternative="greater")
                effect = x.mean(axis=1) - y.mean(axis=1)
                keep = (effect > 0) & (effect >= cfg.min_effect)

        pvalues = np.asarray(res.pvalue, dtype=float)
        keep &= np.isfinite(pvalues)
        if cfg.max_pvalue is not None:
            keep &= pvalues <= cfg.max_pvalue

        candidates = np.flatnonzero(keep)
        order = np.lexsort((candidates, -effect[candidates], pvalues[candidates]))
        chosen = candidates[order][:k]
        return _PairResult(a, b, tuple(genes[chosen]))
