"""Classification engine: scoring, fine-tuning and pruning of a test dataset.

This module provides the ClassificationEngine that annotates a test
expression matrix against a TrainedReference, and the ClassificationResult
holding scores, labels and diagnostics.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import numpy as np
import pandas as pd
import yaml

from ...io.tables import as_expression_frame, ensure_output_dir, write_dataframe
from ..errors import GeneIndexMismatchError
from ..reference.engine import TrainedReference
from ..reference.markers import MarkerSet
from .config import ClassificationConfig
from .parallel import run_chunks_parallel
from .pruning import Pruner, compute_deltas
from .scoring import ScoringContext

LABEL_COLUMNS = [
    "first_label",
    "label",
    "margin",
    "delta",
    "pruned",
    "final_label",
    "n_iterations",
    "tuning_first",
    "tuning_second",
    "prune_reason",
    "error",
]


@dataclass
class Assignment:
    """Annotation of one test sample.

    Attributes:
        sample: Sample identifier
        first_label: Provisional label (max pre-tuning score)
        label: Label after fine-tuning
        scores: Pre-tuning score per reference label
        margin: Post-tuning best minus second-best score
        delta: Assigned-label score minus the sample's median score
        pruned: Whether the assignment was rejected
        final_label: label, or the no-call label when pruned
        n_iterations: Fine-tuning iterations performed
        error: Numeric failure message, if any
    """

    sample: str
    first_label: Optional[str]
    label: Optional[str]
    scores: Dict[str, float]
    margin: float
    delta: float
    pruned: bool
    final_label: str
    n_iterations: int = 0
    error: Optional[str] = None


@dataclass
class ClassificationResult:
    """Result of classifying one test dataset.

    Attributes:
        scores: Pre-tuning scores (samples x reference labels)
        labels: Per-sample assignments and diagnostics
        markers: Marker set restricted to the genes used
        genes_used: Marker genes shared by reference and test
        excluded_labels: Labels that could not be scored (too few markers)
        fences: Outlier lower fence per assigned label
        config: Effective classification configuration
    """

    scores: pd.DataFrame
    labels: pd.DataFrame
    markers: MarkerSet
    genes_used: List[str]
    excluded_labels: List[str] = field(default_factory=list)
    fences: Dict[str, float] = field(default_factory=dict)
    config: Dict[str, Any] = field(default_factory=dict)

    @property
    def n_samples(self) -> int:
        return self.labels.shape[0]

    @property
    def final_labels(self) -> pd.Series:
        return self.labels["final_label"]

    def to_assignments(self) -> List[Assignment]:
        """Per-sample Assignment records."""
        assignments = []
        for i, (sample, row) in enumerate(self.labels.iterrows()):
            assignments.append(
                Assignment(
                    sample=str(sample),
                    first_label=_optional(row["first_label"]),
                    label=_optional(row["label"]),
                    scores=self.scores.iloc[i].astype(float).to_dict(),
                    margin=float(row["margin"]),
                    delta=float(row["delta"]),
                    pruned=bool(row["pruned"]),
                    final_label=str(row["final_label"]),
                    n_iterations=int(row["n_iterations"]),
                    error=_optional(row["error"]),
                )
            )
        return assignments

    def summary(self) -> pd.DataFrame:
        """Per-label counts of assigned and pruned samples."""
        df = self.labels
        records = []
        for label in self.scores.columns:
            mask = df["label"] == label
            n = int(mask.sum())
            records.append({
                "label": label,
                "n_first": int((df["first_label"] == label).sum()),
                "n_assigned": n,
                "n_pruned": int(df.loc[mask, "pruned"].sum()),
                "n_final": n - int(df.loc[mask, "pruned"].sum()),
                "median_delta": float(df.loc[mask, "delta"].median()) if n else np.nan,
                "median_margin": float(df.loc[mask, "margin"].median()) if n else np.nan,
                "excluded": label in self.excluded_labels,
            })
        return pd.DataFrame.from_records(records)

    def write(self, output_dir: Union[str, Path]) -> Dict[str, Path]:
        """Write scores, labels, summary and markers to output_dir."""
        output_dir = ensure_output_dir(output_dir)
        paths = {
            "scores": write_dataframe(self.scores, output_dir / "scores.csv", index=True),
            "labels": write_dataframe(self.labels, output_dir / "labels.csv", index=True),
            "summary": write_dataframe(self.summary(), output_dir / "summary.csv"),
        }
        markers_path = output_dir / "markers.yaml"
        with open(markers_path, "w") as f:
            yaml.safe_dump(self.markers.to_dict(), f, sort_keys=False)
        paths["markers"] = markers_path
        return paths


def _optional(value: Any) -> Optional[str]:
    if value is None or (isinstance(value, float) and np.isnan(value)):
        return None
    return str(value)


class ClassificationEngine:
    """Annotate test samples against a trained reference.

    Workflow:
    1. Restrict the reference to marker genes present in the test data
    2. Score every sample against every label (quantile Spearman)
    3. Fine-tune provisional labels on pairwise markers of close labels
    4. Compute deltas and prune low-confidence assignments

    The reference is read-only and can be reused for any number of test
    datasets.

    Example:
        >>> engine = ClassificationEngine(ClassificationConfig())
        >>> result = engine.classify(test_matrix, reference)
        >>> result.labels["final_label"].value_counts()
    """

    def __init__(
        self,
        config: Optional[ClassificationConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or ClassificationConfig()
        self.logger = logger or logging.getLogger(__name__)

    def classify(
        self,
        test: Any,
        reference: TrainedReference,
        layer: Optional[str] = None,
    ) -> ClassificationResult:
        """Classify every sample of a test dataset.

        Args:
            test: Genes x samples DataFrame or AnnData (cells x genes)
            reference: Trained reference
            layer: AnnData layer to read (AnnData input only)

        Returns:
            ClassificationResult

        Raises:
            GeneIndexMismatchError: Reference and test share fewer than
                ``min_common_genes`` genes
        """
        cfg = self.config
        frame = as_expression_frame(test, layer=layer)

        self.logger.info("=" * 70)
        self.logger.info("CLASSIFICATION")
        self.logger.info("=" * 70)
        self.logger.info(
            "Test: %d genes x %d samples; reference: %d labels, %d marker genes",
            frame.shape[0],
            frame.shape[1],
            len(reference.labels),
            len(reference.genes),
        )

        # Phase 1: shared genes
        present = set(frame.index)
        reference_genes = reference.reference_genes or reference.genes
        n_common = sum(1 for g in reference_genes if g in present)
        if n_common < cfg.min_common_genes:
            raise GeneIndexMismatchError(
                n_common,
                cfg.min_common_genes,
                context={
                    "n_reference_genes": len(reference_genes),
                    "n_test_genes": frame.shape[0],
                },
            )
        shared = [g for g in reference.genes if g in present]
        self.logger.info(
            "Phase 1: %d genes shared with reference; %d of %d marker genes present",
            n_common,
            len(shared),
            len(reference.genes),
        )

        context = ScoringContext.from_reference(reference, shared, cfg.scoring)
        if context.excluded:
            self.logger.warning(
                "Excluding %d labels with fewer than %d usable markers: %s",
                len(context.excluded),
                cfg.scoring.min_genes,
                ", ".join(context.excluded),
            )

        # Phase 2: scoring and fine-tuning
        self.logger.info(
            "Phase 2: Scoring (quantile=%.2f) and fine-tuning (%s)...",
            cfg.scoring.quantile,
            "enabled" if cfg.fine_tune.enabled else "disabled",
        )
        values = frame.loc[context.genes].to_numpy(dtype=float)
        samples = list(frame.columns)
        records = run_chunks_parallel(
            context,
            values,
            samples,
            cfg.fine_tune,
            chunk_size=cfg.scoring.chunk_size,
            n_workers=cfg.scoring.n_workers,
            logger=self.logger,
        )

        score_matrix = (
            np.vstack([r.scores for r in records])
            if records
            else np.empty((0, len(context.labels)))
        )
        scores = pd.DataFrame(score_matrix, index=samples, columns=context.labels)
        scores.index.name = "sample"

        # Phase 3: pruning
        self.logger.info("Phase 3: Pruning low-confidence assignments...")
        assigned = [r.tuning.label for r in records]
        deltas = compute_deltas(score_matrix, context.labels, assigned)
        margins = np.asarray([r.tuning.margin for r in records], dtype=float)
        pruning = Pruner(cfg.pruning, logger=self.logger).prune(deltas, assigned, margins)

        no_call = cfg.pruning.no_call_label
        labels = pd.DataFrame(
            {
                "first_label": [r.first_label for r in records],
                "label": assigned,
                "margin": margins,
                "delta": deltas,
                "pruned": pruning.pruned,
                "final_label": [
                    no_call if pruned else label
                    for label, pruned in zip(assigned, pruning.pruned)
                ],
                "n_iterations": [r.tuning.n_iterations for r in records],
                "tuning_first": [r.tuning.first for r in records],
                "tuning_second": [r.tuning.second for r in records],
                "prune_reason": pruning.reasons,
                "error": [r.error for r in records],
            },
            index=scores.index,
            columns=LABEL_COLUMNS,
        )

        result = ClassificationResult(
            scores=scores,
            labels=labels,
            markers=context.markers,
            genes_used=list(context.genes),
            excluded_labels=list(context.excluded),
            fences=pruning.fences,
            config=cfg.to_dict(),
        )
        self._log_summary(result)
        return result

    def _log_summary(self, result: ClassificationResult) -> None:
        df = result.labels
        n_changed = int(
            (df["label"].notna() & (df["label"] != df["first_label"])).sum()
        )
        self.logger.info("-" * 70)
        self.logger.info(
            "Classified %d samples: %d labeled, %d pruned, %d changed by fine-tuning, %d errors",
            result.n_samples,
            int((~df["pruned"]).sum()),
            int(df["pruned"].sum()),
            n_changed,
            int(df["error"].notna().sum()),
        )
        for label, count in df["final_label"].value_counts().items():
            self.logger.info("  %-30s %6d", label, count)
