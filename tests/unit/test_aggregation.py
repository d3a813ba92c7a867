"""Unit tests for pseudo-bulk aggregation."""

import math

import pytest
import numpy as np
import pandas as pd

from celltype_transfer.core.reference import (
    AggregationConfig,
    ReferenceAggregator,
    aggregate_label,
    n_profiles_for,
)


class TestProfileCount:
    """Tests for the number of profiles per label."""

    @pytest.mark.parametrize("n", [1, 2, 3, 4, 10, 17, 100, 1000])
    def test_ceil_sqrt(self, n):
        """Test ceil(sqrt(N)) profiles within [1, N]."""
        k = n_profiles_for(n)
        assert k == min(math.ceil(math.sqrt(n)), n)
        assert 1 <= k <= n

    def test_power(self):
        """Test custom exponent."""
        assert n_profiles_for(100, power=1.0) == 100
        assert n_profiles_for(100, power=0.25) == 4


class TestAggregateLabel:
    """Tests for aggregate_label."""

    def test_single_sample_unchanged(self):
        """Test that a single sample is returned unchanged."""
        values = np.array([[1.0], [2.5], [0.0]])
        profiles = aggregate_label(values, "A", seed=0)
        assert len(profiles) == 1
        np.testing.assert_array_equal(profiles[0].expression, values[:, 0])
        assert profiles[0].n_samples == 1

    def test_counts_and_membership(self, reference_matrix, reference_labels):
        """Test profile count and that every sample is used once."""
        values = reference_matrix.loc[:, reference_labels == "Label_A"].to_numpy()
        profiles = aggregate_label(values, "Label_A", n_components=5, seed=0)
        assert 1 <= len(profiles) <= values.shape[1]
        assert len(profiles) <= n_profiles_for(values.shape[1])
        assert sum(p.n_samples for p in profiles) == values.shape[1]
        assert [p.cluster_id for p in profiles] == list(range(len(profiles)))

    def test_weighted_mean_preserved(self, reference_matrix, reference_labels):
        """Test that profile means weighted by size equal the label mean."""
        values = reference_matrix.loc[:, reference_labels == "Label_B"].to_numpy()
        profiles = aggregate_label(values, "Label_B", n_components=5, seed=1)
        weighted = sum(p.expression * p.n_samples for p in profiles) / values.shape[1]
        np.testing.assert_allclose(weighted, values.mean(axis=1))

    def test_seed_reproducible(self, reference_matrix, reference_labels):
        """Test identical profiles for identical seeds."""
        values = reference_matrix.loc[:, reference_labels == "Label_C"].to_numpy()
        first = aggregate_label(values, "Label_C", n_components=5, seed=7)
        second = aggregate_label(values, "Label_C", n_components=5, seed=7)
        assert len(first) == len(second)
        for a, b in zip(first, second):
            np.testing.assert_array_equal(a.expression, b.expression)

    def test_constant_samples_average(self):
        """Test that samples without variable genes collapse to their mean."""
        values = np.ones((5, 9))
        profiles = aggregate_label(values, "A", seed=0)
        assert len(profiles) == 1
        assert profiles[0].n_samples == 9

    def test_empty_label_rejected(self):
        """Test error for labels without samples."""
        with pytest.raises(ValueError):
            aggregate_label(np.empty((3, 0)), "A")


class TestReferenceAggregator:
    """Tests for ReferenceAggregator."""

    def test_profiles_per_label(self, reference_matrix, reference_labels):
        """Test that all labels are aggregated, in sorted order."""
        config = AggregationConfig(enabled=True, n_components=5, random_seed=0)
        profiles = ReferenceAggregator(config).aggregate(reference_matrix, reference_labels)
        labels = [p.label for p in profiles]
        assert labels == sorted(labels)
        for label in np.unique(reference_labels):
            group = [p for p in profiles if p.label == label]
            assert 1 <= len(group) <= n_profiles_for(int((reference_labels == label).sum()))

    def test_parallel_matches_sequential(self, reference_matrix, reference_labels):
        """Test that joblib workers give the same profiles."""
        seq = ReferenceAggregator(
            AggregationConfig(enabled=True, n_components=5, random_seed=0)
        ).aggregate(reference_matrix, reference_labels)
        par = ReferenceAggregator(
            AggregationConfig(enabled=True, n_components=5, random_seed=0, n_workers=2)
        ).aggregate(reference_matrix, reference_labels)
        assert len(seq) == len(par)
        for a, b in zip(seq, par):
            assert a.label == b.label
            np.testing.assert_allclose(a.expression, b.expression)

    def test_missing_seed_logged(self, reference_matrix, reference_labels, caplog):
        """Test warning when no random seed is given."""
        config = AggregationConfig(enabled=True, n_components=5)
        with caplog.at_level("WARNING"):
            ReferenceAggregator(config).aggregate(reference_matrix, reference_labels)
        assert "random_seed" in caplog.text

    def test_invalid_power(self):
        """Test configuration validation."""
        with pytest.raises(ValueError):
            AggregationConfig(power=0.0)
