"""Unit tests for table loading and run logging."""

import json
import logging

import pytest
import numpy as np
import pandas as pd
import yaml

from celltype_transfer.core.errors import InputShapeError, InvalidMarkerSetError
from celltype_transfer.io import (
    as_expression_frame,
    get_logger,
    load_expression_matrix,
    load_labels,
    load_marker_file,
    log_json,
    log_yaml,
)


class TestAsExpressionFrame:
    """Tests for as_expression_frame."""

    def test_dataframe_passthrough(self, test_matrix):
        """Test DataFrame input is copied as float."""
        frame = as_expression_frame(test_matrix)
        pd.testing.assert_frame_equal(frame, test_matrix, check_names=False)
        assert frame is not test_matrix

    def test_anndata_transposed(self, test_adata, test_matrix):
        """Test AnnData (cells x genes) becomes genes x samples."""
        frame = as_expression_frame(test_adata)
        assert frame.shape == test_matrix.shape
        assert list(frame.index) == list(test_matrix.index)
        assert list(frame.columns) == list(test_matrix.columns)

    def test_array_requires_genes(self):
        """Test that arrays need gene identifiers."""
        with pytest.raises(InputShapeError):
            as_expression_frame(np.ones((3, 2)))
        frame = as_expression_frame(np.ones((3, 2)), genes=["a", "b", "c"])
        assert list(frame.columns) == ["sample_0", "sample_1"]

    def test_duplicated_genes_rejected(self):
        """Test that duplicated gene identifiers are an error."""
        df = pd.DataFrame(np.ones((3, 2)), index=["a", "b", "a"], columns=["s1", "s2"])
        with pytest.raises(InputShapeError) as exc_info:
            as_expression_frame(df)
        assert "a" in str(exc_info.value)

    def test_non_numeric_rejected(self):
        """Test that non-numeric values are an error."""
        df = pd.DataFrame({"s1": ["1.0", "high"]}, index=["a", "b"])
        with pytest.raises(InputShapeError):
            as_expression_frame(df)


class TestLoadExpressionMatrix:
    """Tests for load_expression_matrix."""

    def test_csv(self, test_matrix, tmp_path):
        """Test genes x samples CSV."""
        path = tmp_path / "test.csv"
        test_matrix.to_csv(path)
        frame = load_expression_matrix(path)
        np.testing.assert_allclose(frame.to_numpy(), test_matrix.to_numpy())
        assert list(frame.columns) == list(test_matrix.columns)

    def test_tsv_samples_as_rows(self, test_matrix, tmp_path):
        """Test samples x genes TSV."""
        path = tmp_path / "test.tsv"
        test_matrix.T.to_csv(path, sep="\t")
        frame = load_expression_matrix(path, samples_as_rows=True)
        assert list(frame.index) == list(test_matrix.index)
        np.testing.assert_allclose(frame.to_numpy(), test_matrix.to_numpy())

    def test_h5ad(self, test_adata, tmp_path):
        """Test AnnData file."""
        path = tmp_path / "test.h5ad"
        test_adata.write_h5ad(path)
        frame = load_expression_matrix(path, layer="counts")
        assert frame.shape == (test_adata.n_vars, test_adata.n_obs)

    def test_missing_file(self, tmp_path):
        """Test error for missing input."""
        with pytest.raises(FileNotFoundError):
            load_expression_matrix(tmp_path / "missing.csv")


class TestLoadLabels:
    """Tests for load_labels."""

    def test_first_column_default(self, tmp_path):
        """Test that the first data column is used by default."""
        path = tmp_path / "labels.csv"
        pd.DataFrame(
            {"cell_type": ["A", "B", "A"], "batch": [1, 1, 2]},
            index=pd.Index(["s1", "s2", "s3"], name="sample"),
        ).to_csv(path)
        labels = load_labels(path)
        assert labels.tolist() == ["A", "B", "A"]
        assert load_labels(path, column="batch").tolist() == [1, 1, 2]

    def test_reordered_to_samples(self, tmp_path):
        """Test alignment to matrix columns; absent samples become NaN."""
        path = tmp_path / "labels.tsv"
        pd.DataFrame({"label": ["A", "B"]}, index=["s1", "s2"]).to_csv(path, sep="\t")
        labels = load_labels(path, samples=["s2", "s3", "s1"])
        assert labels.iloc[0] == "B"
        assert pd.isna(labels.iloc[1])
        assert labels.iloc[2] == "A"

    def test_unknown_column(self, tmp_path):
        """Test error for a missing label column."""
        path = tmp_path / "labels.csv"
        pd.DataFrame({"label": ["A"]}, index=["s1"]).to_csv(path)
        with pytest.raises(KeyError):
            load_labels(path, column="cell_type")

    def test_h5ad_obs(self, reference_adata, tmp_path):
        """Test labels from AnnData obs."""
        path = tmp_path / "reference.h5ad"
        reference_adata.write_h5ad(path)
        labels = load_labels(path, column="cell_type")
        assert len(labels) == reference_adata.n_obs
        with pytest.raises(ValueError):
            load_labels(path)


class TestLoadMarkerFile:
    """Tests for load_marker_file."""

    def test_yaml_per_label(self, per_label_markers, tmp_path):
        """Test per-label YAML markers."""
        path = tmp_path / "markers.yaml"
        with open(path, "w") as f:
            yaml.safe_dump(per_label_markers, f)
        markers = load_marker_file(path)
        assert not markers.is_pairwise
        assert markers.labels == ["Label_A", "Label_B", "Label_C"]

    def test_json_pairwise(self, tmp_path):
        """Test pairwise JSON markers."""
        path = tmp_path / "markers.json"
        path.write_text(json.dumps({"A": {"B": ["g1"]}, "B": {"A": ["g2"]}}))
        markers = load_marker_file(path)
        assert markers.is_pairwise
        assert markers.pairwise["B"]["A"] == ("g2",)

    def test_exported_layout(self, trained_reference, tmp_path):
        """Test reading markers written by MarkerSet.to_dict."""
        path = tmp_path / "markers.yaml"
        with open(path, "w") as f:
            yaml.safe_dump(trained_reference.markers.to_dict(), f)
        assert load_marker_file(path) == trained_reference.markers

    def test_empty_file(self, tmp_path):
        """Test error for an empty marker file."""
        path = tmp_path / "markers.yaml"
        path.write_text("")
        with pytest.raises(InvalidMarkerSetError):
            load_marker_file(path)


class TestLogging:
    """Tests for run logging helpers."""

    def test_get_logger_writes_file(self, tmp_path):
        """Test file logging with timestamped path."""
        logger, path = get_logger("celltype_transfer.test_io", tmp_path / "run.log")
        logger.info("hello %s", "world")
        for handler in logger.handlers:
            handler.flush()
        assert path.exists()
        assert path.name.startswith("run_")
        assert "hello world" in path.read_text()

    def test_get_logger_replaces_file_handler(self, tmp_path):
        """Test that repeated calls keep a single file handler."""
        name = "celltype_transfer.test_io_repeat"
        get_logger(name, tmp_path / "a.log", timestamped=False)
        logger, _ = get_logger(name, tmp_path / "b.log", timestamped=False)
        files = [h for h in logger.handlers if isinstance(h, logging.FileHandler)]
        assert len(files) == 1

    def test_get_logger_overwrites_without_timestamp(self, tmp_path):
        """Test that a fixed log name is rewritten on each run."""
        name = "celltype_transfer.test_io_fixed"
        path = tmp_path / "logs" / "classify.log"
        logger, first = get_logger(name, path, timestamped=False)
        logger.info("first run")
        logger, second = get_logger(name, path, timestamped=False)
        logger.info("second run")
        for handler in logger.handlers:
            handler.flush()
        assert first == second == path
        text = path.read_text()
        assert "second run" in text
        assert "first run" not in text

    def test_log_json(self, tmp_path):
        """Test JSON lines records."""
        path = tmp_path / "logs" / "runs.jsonl"
        log_json(path, {"command": "classify", "n": 3})
        log_json(path, {"command": "annotate", "n": 4})
        lines = path.read_text().splitlines()
        assert [json.loads(line)["n"] for line in lines] == [3, 4]

    def test_log_yaml(self, tmp_path):
        """Test YAML document records."""
        path = tmp_path / "config.log"
        log_yaml(path, {"quantile": 0.8})
        docs = [d for d in yaml.safe_load_all(path.read_text()) if d]
        assert docs == [{"quantile": 0.8}]
