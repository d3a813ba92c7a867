"""Pseudo-bulk aggregation of reference labels.

Large references are reduced to a handful of representative profiles per
label: samples of one label are clustered with k-means on a PCA projection
of their most variable genes, and log-expression is averaged within each
cluster. Scoring cost then scales with the number of profiles instead of
the number of reference samples.

Marker selection never sees these profiles; it always runs on the
original samples.
"""

from __future__ import annotations

import logging
import math
import time
import warnings
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from sklearn.cluster import KMeans
from sklearn.decomposition import PCA
from sklearn.exceptions import ConvergenceWarning

from .config import AggregationConfig


@dataclass(frozen=True)
class PseudoBulkProfile:
    """Averaged expression of one within-label cluster.

    Attributes
    ----------
    label : str
        Reference label
    cluster_id : int
        Cluster index within the label (0-based, contiguous)
    expression : np.ndarray
        Mean log-expression per gene (reference gene order)
    n_samples : int
        Number of reference samples averaged into this profile
    """

    label: str
    cluster_id: int
    expression: np.ndarray
    n_samples: int


def n_profiles_for(n_samples: int, power: float = 0.5) -> int:
    """Number of pseudo-bulk profiles for a label with ``n_samples`` samples."""
    if n_samples < 1:
        return 0
    return int(min(max(math.ceil(n_samples ** power), 1), n_samples))


def aggregate_label(
    values: np.ndarray,
    label: str,
    power: float = 0.5,
    n_components: int = 20,
    n_top_genes: int = 1000,
    n_init: int = 10,
    seed: Optional[int] = None,
) -> List[PseudoBulkProfile]:
    """Cluster one label's samples and average each cluster.

    Parameters
    ----------
    values : np.ndarray
        Log-expression of the label's samples, genes x samples
    label : str
        Label name
    power : float
        ceil(N ** power) profiles are produced for N samples
    n_components : int
        Principal components used for clustering
    n_top_genes : int
        Most variable genes used for the PCA
    n_init : int
        k-means restarts
    seed : int, optional
        Random state for PCA and k-means

    Returns
    -------
    List[PseudoBulkProfile]
        Between 1 and N profiles
    """
    n_samples = values.shape[1]
    if n_samples == 0:
        raise ValueError(f"Label '{label}' has no samples to aggregate")

    k = n_profiles_for(n_samples, power)
    if k >= n_samples:
        return [
            PseudoBulkProfile(label, i, values[:, i].copy(), 1)
            for i in range(n_samples)
        ]

    samples = values.T
    variances = samples.var(axis=0)
    top = np.argsort(-variances, kind="mergesort")[:n_top_genes]
    top = top[variances[top] > 0]
    if k == 1 or top.size == 0:
        return [PseudoBulkProfile(label, 0, values.mean(axis=1), n_samples)]

    features = samples[:, top]
    n_comp = min(n_components, n_samples - 1, features.shape[1])
    if n_comp < features.shape[1]:
        features = PCA(n_components=n_comp, random_state=seed).fit_transform(features)

    with warnings.catch_warnings():
        # Duplicate samples can leave fewer distinct points than clusters
        warnings.simplefilter("ignore", ConvergenceWarning)
        assignments = KMeans(
            n_clusters=k, n_init=n_init, random_state=seed
        ).fit_predict(features)

    profiles = []
    for new_id, cluster in enumerate(np.unique(assignments)):
        members = assignments == cluster
        profiles.append(
            PseudoBulkProfile(
                label,
                new_id,
                values[:, members].mean(axis=1),
                int(members.sum()),
            )
        )
    return profiles


class ReferenceAggregator:
    """Reduce each reference label to pseudo-bulk profiles.

    Parameters
    ----------
    config : AggregationConfig, optional
        Aggregation configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Notes
    -----
    Results are reproducible only when ``config.random_seed`` is set;
    supplying it is the caller's responsibility.
    """

    def __init__(
        self,
        config: Optional[AggregationConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or AggregationConfig(enabled=True)
        self.logger = logger or logging.getLogger(__name__)

    def aggregate(
        self,
        matrix: pd.DataFrame,
        labels: Sequence[str],
    ) -> List[PseudoBulkProfile]:
        """Aggregate every label of a reference.

        Parameters
        ----------
        matrix : pd.DataFrame
            Log-expression, genes x samples
        labels : Sequence[str]
            Label per sample

        Returns
        -------
        List[PseudoBulkProfile]
            Profiles grouped by label (sorted), then by cluster id
        """
        cfg = self.config
        if cfg.random_seed is None:
            self.logger.warning(
                "Aggregating reference without random_seed; pseudo-bulk profiles "
                "will not be reproducible across runs"
            )

        labels_arr = np.asarray([str(x) for x in labels])
        values = matrix.to_numpy(dtype=float)
        unique_labels = sorted(set(labels_arr))

        start = time.time()
        jobs = (
            delayed(aggregate_label)(
                values[:, labels_arr == label],
                label,
                power=cfg.power,
                n_components=cfg.n_components,
                n_top_genes=cfg.n_top_genes,
                n_init=cfg.n_init,
                seed=cfg.random_seed,
            )
            for label in unique_labels
        )
        if cfg.n_workers > 1:
            per_label = Parallel(n_jobs=cfg.n_workers, backend="loky")(jobs)
        else:
            per_label = [func(*args, **kwargs) for func, args, kwargs in jobs]

        profiles = [p for group in per_label for p in group]
        self.logger.info(
            "Aggregated %d reference samples into %d pseudo-bulk profiles "
            "(%d labels) in %.1f seconds",
            values.shape[1],
            len(profiles),
            len(unique_labels),
            time.time() - start,
        )
        for label, group in zip(unique_labels, per_label):
            self.logger.debug(
                "  %s: %d samples -> %d profiles",
                label,
                int((labels_arr == label).sum()),
                len(group),
            )
        return profiles
