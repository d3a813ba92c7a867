"""Unit tests for fine-tuning."""

import pytest
import numpy as np

from celltype_transfer.core.classification import (
    FineTuneConfig,
    FineTuner,
    RankCorrelationScorer,
    ScoringContext,
)
from celltype_transfer.core.classification.finetune import top_two, within_margin
from celltype_transfer.core.reference import MarkerSet, ReferenceBuilder


def _tuner(reference, genes, **kwargs):
    scorer = RankCorrelationScorer(ScoringContext.from_reference(reference, genes))
    return scorer, FineTuner(scorer, FineTuneConfig(**kwargs))


class TestHelpers:
    """Tests for margin helpers."""

    def test_top_two(self):
        """Test best and second-best finite scores."""
        assert top_two(np.array([0.2, np.nan, 0.9, 0.5])) == (0.9, 0.5)
        first, second = top_two(np.array([0.3, np.nan]))
        assert first == 0.3 and np.isnan(second)

    def test_within_margin(self):
        """Test labels within margin of the maximum."""
        labels = ["a", "b", "c", "d"]
        scores = np.array([0.80, 0.77, 0.70, np.nan])
        assert within_margin(labels, scores, 0.05) == ["a", "b"]
        assert within_margin(labels, scores, 0.0) == ["a"]
        assert within_margin(labels, np.full(4, np.nan), 0.05) == []


class TestFineTuner:
    """Tests for FineTuner."""

    def test_iterations_bounded(self, trained_reference, test_matrix):
        """Test iteration count never exceeds the number of labels."""
        scorer, tuner = _tuner(trained_reference, test_matrix.index, margin=1.0)
        values = test_matrix.loc[scorer.context.genes].to_numpy()
        n_labels = len(scorer.context.labels)
        for j in range(values.shape[1]):
            scores = scorer.score(values[:, j])
            result = tuner.tune(values[:, j], scores)
            assert result.n_iterations <= n_labels
            sizes = list(result.active_sizes)
            assert all(a >= b for a, b in zip(sizes, sizes[1:]))

    def test_wide_margin_converges_to_true_label(self, trained_reference, test_matrix, dataset):
        """Test that starting from every label still finds the right one."""
        scorer, tuner = _tuner(trained_reference, test_matrix.index, margin=1.0)
        values = test_matrix.loc[scorer.context.genes].to_numpy()
        for j in [0, 35, 70]:
            result = tuner.tune(values[:, j], scorer.score(values[:, j]))
            assert result.label == dataset.test_truth[j]
            assert result.active_sizes[0] == 3
            assert result.n_iterations >= 1

    def test_scores_not_modified(self, trained_reference, test_matrix):
        """Test that the initial scores are left untouched."""
        scorer, tuner = _tuner(trained_reference, test_matrix.index, margin=1.0)
        x = test_matrix.loc[scorer.context.genes, "test_3"].to_numpy()
        scores = scorer.score(x)
        before = scores.copy()
        tuner.tune(x, scores)
        np.testing.assert_array_equal(scores, before)

    def test_clear_winner_needs_no_iteration(self, trained_reference, test_matrix):
        """Test that a single label within the margin is final immediately."""
        scorer, tuner = _tuner(trained_reference, test_matrix.index, margin=0.0)
        x = test_matrix.loc[scorer.context.genes, "test_0"].to_numpy()
        result = tuner.tune(x, scorer.score(x))
        assert result.label == "Label_A"
        assert result.n_iterations == 0
        assert result.active_sizes == (1,)
        assert result.margin > 0

    def test_disabled_uses_initial_scores(self, trained_reference, test_matrix):
        """Test that disabling fine-tuning keeps the provisional label."""
        scorer, tuner = _tuner(trained_reference, test_matrix.index, enabled=False)
        x = test_matrix.loc[scorer.context.genes, "test_31"].to_numpy()
        scores = scorer.score(x)
        result = tuner.tune(x, scores)
        first, second = top_two(scores)
        assert result.label == scorer.context.labels[scorer.best(scores)]
        assert result.n_iterations == 0
        assert result.margin == pytest.approx(first - second)

    def test_no_scores_gives_no_label(self, trained_reference, test_matrix):
        """Test that a sample without finite scores gets no label."""
        scorer, tuner = _tuner(trained_reference, test_matrix.index)
        x = np.ones(len(scorer.context.genes))
        result = tuner.tune(x, scorer.score(x))
        assert result.label is None
        assert np.isnan(result.margin)

    def test_per_label_markers_fall_back(self, reference_matrix, reference_labels,
                                         per_label_markers, test_matrix):
        """Test fallback to per-label markers without pairwise information."""
        reference = ReferenceBuilder().build(
            reference_matrix, reference_labels, markers=MarkerSet.from_per_label(per_label_markers)
        )
        scorer, tuner = _tuner(reference, test_matrix.index, margin=1.0)
        x = test_matrix.loc[scorer.context.genes, "test_65"].to_numpy()
        result = tuner.tune(x, scorer.score(x))
        assert result.fallback
        assert result.n_iterations == 1
        assert result.label == "Label_C"

    def test_max_iterations_cap(self, trained_reference, test_matrix):
        """Test explicit iteration cap."""
        scorer, tuner = _tuner(trained_reference, test_matrix.index, margin=1.0,
                               max_iterations=0)
        x = test_matrix.loc[scorer.context.genes, "test_0"].to_numpy()
        result = tuner.tune(x, scorer.score(x))
        assert result.n_iterations == 0
        assert result.label == "Label_A"

    def test_invalid_margin(self):
        """Test configuration validation."""
        with pytest.raises(ValueError):
            FineTuneConfig(margin=-0.1)
