"""Pytest configuration and shared fixtures for CellType-Transfer tests."""

import sys
from pathlib import Path

import pytest
import numpy as np
import pandas as pd

# Add package to path
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Import mock data generators
from tests.fixtures import (
    create_expression_adata,
    create_transfer_dataset,
)


# ============================================================================
# Mock Data Fixtures
# ============================================================================


@pytest.fixture(scope="session")
def dataset():
    """Three-label reference plus test set with off-reference samples."""
    return create_transfer_dataset()


@pytest.fixture
def reference_matrix(dataset) -> pd.DataFrame:
    """Reference expression, genes x samples."""
    return dataset.reference.copy()


@pytest.fixture
def reference_labels(dataset) -> np.ndarray:
    """Label per reference sample."""
    return dataset.reference_labels.copy()


@pytest.fixture
def test_matrix(dataset) -> pd.DataFrame:
    """Test expression, genes x samples."""
    return dataset.test.copy()


@pytest.fixture
def per_label_markers() -> dict:
    """Hand-written per-label markers matching the synthetic signatures."""
    return {
        "Label_A": [f"Gene_{i}" for i in range(0, 10)],
        "Label_B": [f"Gene_{i}" for i in range(10, 20)],
        "Label_C": [f"Gene_{i}" for i in range(20, 30)],
    }


@pytest.fixture
def tmp_output_dir(tmp_path: Path) -> Path:
    """Create a temporary output directory for tests."""
    output_dir = tmp_path / "output"
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir


# ============================================================================
# Reference Fixtures
# ============================================================================


@pytest.fixture(scope="session")
def trained_reference(dataset):
    """Reference trained with wilcoxon markers (10 per pair)."""
    from celltype_transfer.core.reference import MarkerConfig, ReferenceBuilder, ReferenceConfig

    config = ReferenceConfig(markers=MarkerConfig(method="wilcoxon"))
    return ReferenceBuilder(config).build(dataset.reference, dataset.reference_labels)


@pytest.fixture(scope="session")
def classic_reference(dataset):
    """Reference trained with classic median-difference markers."""
    from celltype_transfer.core.reference import ReferenceBuilder

    return ReferenceBuilder().build(dataset.reference, dataset.reference_labels)


# ============================================================================
# AnnData Fixtures
# ============================================================================


@pytest.fixture
def reference_adata(dataset):
    """Reference as AnnData with labels in obs['cell_type']."""
    return create_expression_adata(dataset.reference, dataset.reference_labels)


@pytest.fixture
def test_adata(dataset):
    """Test set as AnnData."""
    return create_expression_adata(dataset.test)


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def sample_config_yaml(tmp_path) -> Path:
    """Create sample run configuration file."""
    import yaml

    config = {
        "reference": {
            "markers": {"method": "rank-sum", "n_markers": 8},
            "aggregation": {"enabled": False},
            "min_common_genes": 10,
        },
        "classification": {
            "scoring": {"quantile": 0.9},
            "fine_tune": {"margin": 0.1},
            "pruning": {"modes": ["outlier", "margin"], "margin_threshold": 0.02},
            "min_common_genes": 10,
        },
    }

    path = tmp_path / "config.yaml"
    with open(path, "w") as f:
        yaml.dump(config, f)

    return path
