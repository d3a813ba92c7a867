"""Reference training: marker selection plus profile preparation.

This module provides the ReferenceBuilder that turns a labeled reference
expression matrix into a TrainedReference, the single read-only value
consumed by every classification run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from ...io.tables import as_expression_frame
from ..errors import GeneIndexMismatchError, InputShapeError, InvalidMarkerSetError
from .aggregation import ReferenceAggregator
from .config import ReferenceConfig
from .markers import MarkerSelector, MarkerSet


@dataclass(frozen=True)
class TrainedReference:
    """Immutable reference state shared across test datasets.

    Attributes:
        genes: Marker-union genes; row order of every profile matrix
        labels: Sorted reference labels
        profiles: Label -> expression (genes x profiles); raw reference
            samples or pseudo-bulk profiles
        profile_sizes: Label -> number of reference samples behind each
            profile
        markers: Marker set used for scoring and fine-tuning
        aggregated: Whether profiles are pseudo-bulk
        n_reference_genes: Genes in the reference after filtering
        n_reference_samples: Labeled reference samples used for training
        label_order: Labels in order of first appearance in the reference
        reference_genes: Full gene index of the filtered reference, checked
            against the test genes before classification
    """

    genes: Tuple[str, ...]
    labels: Tuple[str, ...]
    profiles: Dict[str, np.ndarray]
    profile_sizes: Dict[str, Tuple[int, ...]]
    markers: MarkerSet
    aggregated: bool = False
    n_reference_genes: int = 0
    n_reference_samples: int = 0
    label_order: Tuple[str, ...] = ()
    reference_genes: Tuple[str, ...] = ()

    @property
    def n_profiles(self) -> Dict[str, int]:
        return {label: self.profiles[label].shape[1] for label in self.labels}

    def summary(self) -> pd.DataFrame:
        """Per-label overview of profiles and markers."""
        return pd.DataFrame.from_records(
            [
                {
                    "label": label,
                    "n_samples": int(sum(self.profile_sizes[label])),
                    "n_profiles": self.profiles[label].shape[1],
                    "n_markers": len(self.markers.per_label.get(label, ())),
                }
                for label in self.labels
            ]
        )


def _missing_label_mask(labels: np.ndarray) -> np.ndarray:
    missing = pd.isna(labels)
    return missing | np.array([str(x).strip() == "" for x in labels], dtype=bool)


class ReferenceBuilder:
    """Build a TrainedReference from a labeled expression matrix.

    Marker selection always runs on the original samples; optional
    aggregation only replaces the profiles used for scoring.

    Example:
        >>> builder = ReferenceBuilder(ReferenceConfig())
        >>> reference = builder.build(ref_matrix, ref_labels, test_genes=test.index)
        >>> reference.summary()
    """

    def __init__(
        self,
        config: Optional[ReferenceConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or ReferenceConfig()
        self.logger = logger or logging.getLogger(__name__)

    def build(
        self,
        matrix: Any,
        labels: Sequence[Any],
        markers: Any = None,
        test_genes: Optional[Iterable[str]] = None,
        restrict: Optional[Iterable[str]] = None,
        layer: Optional[str] = None,
    ) -> TrainedReference:
        """Train a reference.

        Args:
            matrix: Log-expression, genes x samples DataFrame or AnnData
            labels: Label per reference sample
            markers: Precomputed MarkerSet (pairwise or per-label mapping);
                skips marker selection when given
            test_genes: Genes of the intended test data; the reference is
                restricted to them before marker selection
            restrict: Additional gene whitelist
            layer: AnnData layer to read (AnnData input only)

        Returns:
            TrainedReference

        Raises:
            InputShapeError: Labels do not match samples, or fewer than
                two labels remain
            GeneIndexMismatchError: Too few genes shared with test_genes
            InvalidMarkerSetError: Supplied markers name unknown labels or
                no marker gene survives filtering
        """
        cfg = self.config
        frame = as_expression_frame(matrix, layer=layer)
        labels_arr = np.asarray(list(labels), dtype=object)
        if labels_arr.shape[0] != frame.shape[1]:
            raise InputShapeError(
                f"{labels_arr.shape[0]} labels for {frame.shape[1]} reference samples",
                suggestion="Provide exactly one label per reference column",
            )

        self.logger.info("=" * 70)
        self.logger.info("REFERENCE TRAINING")
        self.logger.info("=" * 70)
        self.logger.info(
            "Reference: %d genes x %d samples", frame.shape[0], frame.shape[1]
        )

        missing = _missing_label_mask(labels_arr)
        if missing.any():
            self.logger.warning(
                "Dropping %d reference samples without a label", int(missing.sum())
            )
            frame = frame.loc[:, ~missing]
            labels_arr = labels_arr[~missing]
        labels_arr = np.asarray([str(x) for x in labels_arr])

        frame = self._filter_genes(frame, test_genes, restrict)

        unique_labels = tuple(sorted(set(labels_arr)))
        if len(unique_labels) < 2:
            raise InputShapeError(
                f"Reference needs at least two labels (found {len(unique_labels)})"
            )

        # Phase 1: markers
        if markers is not None:
            self.logger.info("Phase 1: Using supplied markers (selection skipped)")
            marker_set = self._validate_markers(MarkerSet.coerce(markers), frame, unique_labels)
        else:
            self.logger.info("Phase 1: Selecting markers...")
            marker_set = MarkerSelector(cfg.markers, logger=self.logger).select(
                frame, labels_arr
            )

        genes = marker_set.all_genes(order=list(frame.index))
        if not genes:
            raise InvalidMarkerSetError("No marker genes available after filtering")
        self.logger.info("Marker union: %d genes", len(genes))

        # Phase 2: profiles
        restricted = frame.loc[genes]
        profiles: Dict[str, np.ndarray] = {}
        sizes: Dict[str, Tuple[int, ...]] = {}
        if cfg.aggregation.enabled:
            self.logger.info("Phase 2: Aggregating reference into pseudo-bulk profiles...")
            gene_pos = frame.index.get_indexer(genes)
            pseudo = ReferenceAggregator(cfg.aggregation, logger=self.logger).aggregate(
                frame, labels_arr
            )
            for label in unique_labels:
                group = [p for p in pseudo if p.label == label]
                profiles[label] = np.column_stack([p.expression[gene_pos] for p in group])
                sizes[label] = tuple(p.n_samples for p in group)
        else:
            self.logger.info("Phase 2: Using individual reference samples as profiles")
            values = restricted.to_numpy(dtype=float)
            for label in unique_labels:
                cols = values[:, labels_arr == label]
                profiles[label] = cols.copy()
                sizes[label] = tuple([1] * cols.shape[1])

        reference = TrainedReference(
            genes=tuple(genes),
            labels=unique_labels,
            profiles=profiles,
            profile_sizes=sizes,
            markers=marker_set,
            aggregated=cfg.aggregation.enabled,
            n_reference_genes=frame.shape[0],
            n_reference_samples=frame.shape[1],
            label_order=tuple(pd.unique(labels_arr)),
            reference_genes=tuple(frame.index),
        )
        self.logger.info(
            "Reference ready: %d labels, %d profiles, %d marker genes",
            len(unique_labels),
            sum(reference.n_profiles.values()),
            len(genes),
        )
        return reference

    def _filter_genes(
        self,
        frame: pd.DataFrame,
        test_genes: Optional[Iterable[str]],
        restrict: Optional[Iterable[str]],
    ) -> pd.DataFrame:
        """Apply missing-value, whitelist and test-gene filters."""
        cfg = self.config
        if cfg.check_missing:
            finite = np.isfinite(frame.to_numpy(dtype=float)).all(axis=1)
            if not finite.all():
                self.logger.warning(
                    "Dropping %d reference genes with missing values",
                    int((~finite).sum()),
                )
                frame = frame.loc[finite]

        if restrict is not None:
            keep = set(str(g) for g in restrict)
            frame = frame.loc[frame.index.isin(keep)]
            self.logger.info("Restricted reference to %d whitelisted genes", frame.shape[0])

        if test_genes is not None:
            keep = set(str(g) for g in test_genes)
            shared = frame.index.isin(keep)
            n_shared = int(shared.sum())
            if n_shared < cfg.min_common_genes:
                raise GeneIndexMismatchError(n_shared, cfg.min_common_genes)
            frame = frame.loc[shared]
            self.logger.info("Restricted reference to %d genes shared with test", n_shared)

        return frame

    def _validate_markers(
        self,
        marker_set: MarkerSet,
        frame: pd.DataFrame,
        labels: Tuple[str, ...],
    ) -> MarkerSet:
        """Check supplied markers against reference labels and genes."""
        unknown = sorted(set(marker_set.labels) - set(labels))
        if unknown:
            raise InvalidMarkerSetError(
                f"Markers given for labels absent from the reference: {', '.join(unknown)}",
                context={"unknown_labels": unknown},
            )
        without = sorted(set(labels) - set(marker_set.labels))
        if without:
            self.logger.warning(
                "No markers supplied for %d reference labels: %s",
                len(without),
                ", ".join(without),
            )

        all_genes = marker_set.all_genes()
        available = set(frame.index)
        dropped: List[str] = [g for g in all_genes if g not in available]
        if dropped:
            self.logger.warning(
                "Dropping %d of %d supplied marker genes absent from the data",
                len(dropped),
                len(all_genes),
            )
            marker_set = marker_set.restrict(available)
        return marker_set
