"""Unit tests for rank-correlation scoring."""

import pytest
import numpy as np
import pandas as pd
from scipy import stats

from celltype_transfer.core.classification import (
    RankCorrelationScorer,
    ScoringConfig,
    ScoringContext,
    pick_best,
    scaled_ranks,
)
from celltype_transfer.core.reference import MarkerSet, ReferenceBuilder


def _scorer(reference, genes, **kwargs):
    context = ScoringContext.from_reference(reference, genes, ScoringConfig(**kwargs))
    return RankCorrelationScorer(context)


class TestScaledRanks:
    """Tests for scaled_ranks."""

    def test_dot_product_is_spearman(self):
        """Test that the dot product of scaled ranks equals Spearman's rho."""
        rng = np.random.default_rng(0)
        x = rng.normal(size=25)
        y = x + rng.normal(scale=0.8, size=25)
        expected = stats.spearmanr(x, y).correlation
        assert scaled_ranks(x) @ scaled_ranks(y) == pytest.approx(expected)

    def test_ties_use_average_ranks(self):
        """Test Spearman with tied values."""
        x = np.array([1.0, 1.0, 2.0, 3.0, 3.0, 5.0])
        y = np.array([2.0, 1.0, 4.0, 4.0, 6.0, 5.0])
        expected = stats.spearmanr(x, y).correlation
        assert scaled_ranks(x) @ scaled_ranks(y) == pytest.approx(expected)

    def test_matrix_columns(self):
        """Test column-wise ranking and unit norm."""
        values = np.array([[1.0, 3.0], [2.0, 2.0], [3.0, 1.0]])
        scaled = scaled_ranks(values)
        np.testing.assert_allclose(np.linalg.norm(scaled, axis=0), 1.0)
        np.testing.assert_allclose(scaled[:, 0], -scaled[:, 1])

    def test_constant_column_is_nan(self):
        """Test that constant vectors cannot be ranked."""
        assert np.isnan(scaled_ranks(np.ones(5))).all()
        scaled = scaled_ranks(np.array([[1.0, 2.0], [1.0, 3.0], [1.0, 1.0]]))
        assert np.isnan(scaled[:, 0]).all()
        assert np.isfinite(scaled[:, 1]).all()


class TestPickBest:
    """Tests for pick_best."""

    def test_highest_score(self):
        """Test argmax over finite scores."""
        assert pick_best(np.array([0.1, np.nan, 0.7]), ["a", "b", "c"]) == 2

    def test_all_nan(self):
        """Test that no finite score gives no label."""
        assert pick_best(np.array([np.nan, np.nan]), ["a", "b"]) is None

    def test_lexicographic_tie_break(self):
        """Test the smallest label name wins exact ties."""
        assert pick_best(np.array([0.5, 0.9, 0.9]), ["z", "y", "x"]) == 2

    def test_reference_order_tie_break(self):
        """Test the label seen first in the reference wins exact ties."""
        scores = np.array([0.9, 0.9, 0.1])
        labels = ["alpha", "beta", "gamma"]
        assert pick_best(scores, labels, "reference_order", ["gamma", "beta", "alpha"]) == 1
        assert pick_best(scores, labels, "lexicographic", ["gamma", "beta", "alpha"]) == 0


class TestScoringContext:
    """Tests for ScoringContext."""

    def test_restricts_to_shared_genes(self, trained_reference):
        """Test gene restriction keeps reference order."""
        genes = list(reversed(trained_reference.genes[:20]))
        context = ScoringContext.from_reference(trained_reference, genes)
        assert context.genes == list(trained_reference.genes[:20])
        for label in context.labels:
            assert context.profiles[label].shape[0] == 20

    def test_excludes_labels_without_markers(self, trained_reference):
        """Test labels with fewer than min_genes markers are excluded."""
        genes = [g for g in trained_reference.genes
                 if g not in trained_reference.markers.per_label["Label_C"]]
        context = ScoringContext.from_reference(trained_reference, genes)
        assert context.excluded == ("Label_C",)

        scorer = RankCorrelationScorer(context)
        rng = np.random.default_rng(3)
        scores = scorer.score(rng.normal(size=len(context.genes)))
        assert np.isnan(scores[context.labels.index("Label_C")])
        assert np.isfinite(scores[context.labels.index("Label_A")])


class TestRankCorrelationScorer:
    """Tests for RankCorrelationScorer."""

    def test_matches_scipy_quantile(self, trained_reference, test_matrix):
        """Test score = 0.8 quantile of per-profile Spearman correlations."""
        scorer = _scorer(trained_reference, test_matrix.index)
        genes = scorer.context.genes
        x = test_matrix.loc[genes, "test_0"].to_numpy()
        scores = scorer.score(x)

        profiles = trained_reference.profiles["Label_A"]
        rows = [trained_reference.genes.index(g) for g in genes]
        cors = [stats.spearmanr(x, profiles[rows, j]).correlation
                for j in range(profiles.shape[1])]
        assert scores[0] == pytest.approx(np.quantile(cors, 0.8))

    def test_quantile_parameter(self, trained_reference, test_matrix):
        """Test that the quantile is configurable."""
        low = _scorer(trained_reference, test_matrix.index, quantile=0.0)
        high = _scorer(trained_reference, test_matrix.index, quantile=1.0)
        x = test_matrix.loc[low.context.genes, "test_0"].to_numpy()
        assert np.all(low.score(x) <= high.score(x))

    @pytest.mark.parametrize("transform", [
        lambda v: v * 3.7,
        np.log1p,
        np.exp,
    ])
    def test_monotone_transform_invariance(self, trained_reference, test_matrix, transform):
        """Test identical scores after a strictly increasing transform."""
        scorer = _scorer(trained_reference, test_matrix.index)
        values = test_matrix.loc[scorer.context.genes].to_numpy()
        for j in range(0, values.shape[1], 7):
            np.testing.assert_allclose(
                scorer.score(values[:, j]),
                scorer.score(transform(values[:, j])),
                rtol=0,
                atol=1e-12,
            )

    def test_constant_sample_is_nan(self, trained_reference, test_matrix):
        """Test that a constant sample yields no scores."""
        scorer = _scorer(trained_reference, test_matrix.index)
        assert np.isnan(scorer.score(np.ones(len(scorer.context.genes)))).all()

    def test_missing_values_dropped(self, trained_reference, test_matrix):
        """Test that non-finite genes are ignored, not propagated."""
        scorer = _scorer(trained_reference, test_matrix.index)
        x = test_matrix.loc[scorer.context.genes, "test_0"].to_numpy().copy()
        x[[1, 5]] = np.nan
        scores = scorer.score(x)
        assert np.isfinite(scores).all()

    def test_too_few_usable_genes(self, trained_reference, test_matrix):
        """Test NaN scores when fewer than min_genes values are finite."""
        scorer = _scorer(trained_reference, test_matrix.index)
        x = np.full(len(scorer.context.genes), np.nan)
        x[0] = 1.0
        assert np.isnan(scorer.score(x)).all()

    def test_subset_of_labels_and_genes(self, trained_reference, test_matrix):
        """Test scoring a subset of labels on a subset of genes."""
        scorer = _scorer(trained_reference, test_matrix.index)
        ctx = scorer.context
        idx = ctx.positions(ctx.markers.pairwise_genes(["Label_A", "Label_B"]))
        x = test_matrix.loc[ctx.genes, "test_0"].to_numpy()
        scores = scorer.score(x, ["Label_B", "Label_A"], idx)
        assert scores.shape == (2,)
        assert scores[1] > scores[0]

    def test_true_label_scores_highest(self, trained_reference, test_matrix, dataset):
        """Test that on-reference samples score their own label highest."""
        scorer = _scorer(trained_reference, test_matrix.index)
        values = test_matrix.loc[scorer.context.genes].to_numpy()
        hits = 0
        on_reference = np.flatnonzero(np.isin(dataset.test_truth, dataset.labels))
        for j in on_reference:
            best = scorer.best(scorer.score(values[:, j]))
            hits += scorer.context.labels[best] == dataset.test_truth[j]
        assert hits / len(on_reference) >= 0.9

    def test_per_label_markers(self, reference_matrix, reference_labels, per_label_markers,
                               test_matrix):
        """Test scoring with a per-label marker set."""
        reference = ReferenceBuilder().build(
            reference_matrix, reference_labels, markers=MarkerSet.from_per_label(per_label_markers)
        )
        scorer = _scorer(reference, test_matrix.index)
        assert len(scorer.context.genes) == 30
        x = test_matrix.loc[scorer.context.genes, "test_40"].to_numpy()
        assert scorer.context.labels[scorer.best(scorer.score(x))] == "Label_B"
