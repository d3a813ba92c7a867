"""
Parallel scoring of test samples.

Test samples are independent given the trained reference, so the test
matrix is split into column chunks that are scored and fine-tuned in
worker processes:
1. The reference is restricted once to the shared genes (ScoringContext)
2. Each worker receives the context plus a dense chunk of test columns
3. Per-sample records are gathered back in the original sample order

Numeric failures are caught per sample and returned as an error message
so one bad sample never aborts the run.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np

from .config import FineTuneConfig
from .finetune import FineTuner, TuningResult
from .scoring import RankCorrelationScorer, ScoringContext


@dataclass
class SampleRecord:
    """Scoring and fine-tuning outcome of one test sample."""
    sample: str
    scores: np.ndarray            # Pre-tuning score per reference label
    first_label: Optional[str]    # Provisional label (max pre-tuning score)
    tuning: TuningResult
    error: Optional[str] = None


@dataclass
class ChunkWorkItem:
    """Dense block of test samples for one worker."""
    samples: List[str]
    values: np.ndarray            # (n_shared_genes, n_samples)


def make_chunks(
    values: np.ndarray,
    samples: Sequence[str],
    chunk_size: int = 500,
) -> List[ChunkWorkItem]:
    """Split a genes x samples matrix into column chunks."""
    samples = list(samples)
    return [
        ChunkWorkItem(
            samples=samples[start:start + chunk_size],
            values=np.ascontiguousarray(values[:, start:start + chunk_size]),
        )
        for start in range(0, len(samples), chunk_size)
    ]


def worker_score_chunk(
    context: ScoringContext,
    work_item: ChunkWorkItem,
    fine_tune: FineTuneConfig,
) -> List[SampleRecord]:
    """Score and fine-tune every sample of a chunk.

    This function is designed to be called via multiprocessing; it builds
    its own scorer so the ranked-profile cache stays local to the worker.
    """
    scorer = RankCorrelationScorer(context)
    tuner = FineTuner(scorer, fine_tune)
    n_labels = len(context.labels)
    records = []

    for j, sample in enumerate(work_item.samples):
        x = work_item.values[:, j]
        try:
            scores = scorer.score(x)
            best = scorer.best(scores)
            tuning = tuner.tune(x, scores)
        except (ValueError, FloatingPointError) as e:
            records.append(SampleRecord(
                sample=sample,
                scores=np.full(n_labels, np.nan),
                first_label=None,
                tuning=TuningResult(label=None),
                error=f"{type(e).__name__}: {e}",
            ))
            continue

        records.append(SampleRecord(
            sample=sample,
            scores=scores,
            first_label=context.labels[best] if best is not None else None,
            tuning=tuning,
        ))

    return records


def run_chunks_parallel(
    context: ScoringContext,
    values: np.ndarray,
    samples: Sequence[str],
    fine_tune: FineTuneConfig,
    chunk_size: int = 500,
    n_workers: int = 1,
    logger: Optional[logging.Logger] = None,
) -> List[SampleRecord]:
    """Score all test samples, in parallel when n_workers > 1.

    Parameters
    ----------
    context : ScoringContext
        Reference restricted to the shared genes
    values : np.ndarray
        Test expression over ``context.genes`` (genes x samples)
    samples : Sequence[str]
        Sample identifiers (columns of ``values``)
    fine_tune : FineTuneConfig
        Fine-tuning configuration
    chunk_size : int
        Samples per work item
    n_workers : int
        Number of parallel workers (1 = sequential)
    logger : logging.Logger, optional
        Logger for progress tracking

    Returns
    -------
    List[SampleRecord]
        One record per sample, in input order
    """
    _logger = logger or logging.getLogger(__name__)
    work_items = make_chunks(values, samples, chunk_size)
    if not work_items:
        return []

    _logger.info(
        "Scoring %d samples in %d chunks with %d workers",
        len(samples), len(work_items), max(n_workers, 1)
    )
    start_time = time.time()

    if n_workers <= 1:
        # Sequential mode (for debugging or single-core systems)
        chunk_results = [worker_score_chunk(context, item, fine_tune) for item in work_items]
    else:
        try:
            from joblib import Parallel, delayed

            chunk_results = Parallel(n_jobs=n_workers, backend="loky", verbose=5)(
                delayed(worker_score_chunk)(context, item, fine_tune) for item in work_items
            )
        except (OSError, RuntimeError) as e:
            _logger.warning("Parallel execution failed: %s. Falling back to sequential.", e)
            chunk_results = [worker_score_chunk(context, item, fine_tune) for item in work_items]

    _logger.info("Scoring completed in %.2f seconds", time.time() - start_time)

    records = [record for chunk in chunk_results for record in chunk]
    for record in records:
        if record.error:
            _logger.error("  Sample %s: FAILED - %s", record.sample, record.error)
    return records
