"""Table and object I/O for CellType-Transfer.

Provides loaders for expression matrices, label vectors and marker files,
conversion of supported inputs to gene-by-sample DataFrames, and
persistence of trained references.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional, Sequence, Union

import joblib
import numpy as np
import pandas as pd
import yaml
from scipy import sparse

from ..core.errors import InputShapeError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

H5AD_SUFFIXES = (".h5ad",)
TSV_SUFFIXES = (".tsv", ".txt", ".tab")


def ensure_output_dir(path: PathLike) -> Path:
    """Create the directory at path if it does not exist and return it."""
    directory = Path(path)
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def _is_anndata(data: Any) -> bool:
    return hasattr(data, "var_names") and hasattr(data, "obs_names") and hasattr(data, "X")


def as_expression_frame(
    data: Any,
    layer: Optional[str] = None,
    genes: Optional[Sequence[str]] = None,
    samples: Optional[Sequence[str]] = None,
) -> pd.DataFrame:
    """Convert supported expression inputs to a genes x samples DataFrame.

    Parameters
    ----------
    data : DataFrame, ndarray or AnnData
        DataFrames and arrays are genes x samples; AnnData is cells x genes
        and is transposed.
    layer : str, optional
        AnnData layer to read instead of ``X``
    genes : Sequence[str], optional
        Gene identifiers (required for arrays)
    samples : Sequence[str], optional
        Sample identifiers for arrays (default ``sample_<i>``)

    Returns
    -------
    pd.DataFrame
        Float matrix with string gene index and string sample columns

    Raises
    ------
    InputShapeError
        If gene identifiers are missing or duplicated, or values are not
        numeric
    """
    if _is_anndata(data):
        if layer is not None:
            if layer not in data.layers:
                raise InputShapeError(
                    f"Layer '{layer}' not found in AnnData (available: {list(data.layers.keys())})"
                )
            matrix = data.layers[layer]
        else:
            matrix = data.X
        matrix = matrix.toarray() if sparse.issparse(matrix) else np.asarray(matrix)
        frame = pd.DataFrame(
            matrix.T,
            index=data.var_names.astype(str),
            columns=data.obs_names.astype(str),
        )
    elif isinstance(data, pd.DataFrame):
        frame = data.copy()
    else:
        values = np.asarray(data)
        if values.ndim != 2:
            raise InputShapeError(f"Expression matrix must be 2-D, got shape {values.shape}")
        if genes is None:
            raise InputShapeError("Gene identifiers are required for array input")
        if samples is None:
            samples = [f"sample_{i}" for i in range(values.shape[1])]
        frame = pd.DataFrame(values, index=list(genes), columns=list(samples))

    frame.index = pd.Index(frame.index.astype(str), name="gene")
    frame.columns = frame.columns.astype(str)

    if frame.index.has_duplicates:
        dups = frame.index[frame.index.duplicated()].unique().tolist()
        raise InputShapeError(
            f"Duplicated gene identifiers: {', '.join(dups[:5])}"
            + (f" ... ({len(dups)} total)" if len(dups) > 5 else ""),
            suggestion="Collapse or rename duplicated genes before annotation",
        )
    try:
        frame = frame.astype(float)
    except (TypeError, ValueError) as e:
        raise InputShapeError(f"Expression values must be numeric: {e}") from e
    return frame


def load_expression_matrix(
    path: PathLike,
    layer: Optional[str] = None,
    samples_as_rows: bool = False,
) -> pd.DataFrame:
    """Read an expression matrix from CSV/TSV or h5ad.

    Parameters
    ----------
    path : PathLike
        Table with gene identifiers in the first column (genes x samples),
        or an .h5ad file (cells x genes)
    layer : str, optional
        AnnData layer (h5ad only)
    samples_as_rows : bool
        Table is samples x genes and must be transposed

    Returns
    -------
    pd.DataFrame
        Genes x samples matrix

    Raises
    ------
    FileNotFoundError
        If the file does not exist.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Expression matrix not found: {path}")

    if path.suffix.lower() in H5AD_SUFFIXES:
        import scanpy as sc

        adata = sc.read_h5ad(path)
        logger.info("Loaded %s: %d cells x %d genes", path.name, adata.n_obs, adata.n_vars)
        return as_expression_frame(adata, layer=layer)

    sep = "\t" if path.suffix.lower() in TSV_SUFFIXES else ","
    df = pd.read_csv(path, sep=sep, index_col=0)
    if samples_as_rows:
        df = df.T
    logger.info("Loaded %s: %d genes x %d samples", path.name, df.shape[0], df.shape[1])
    return as_expression_frame(df)


def load_labels(
    path: PathLike,
    column: Optional[str] = None,
    samples: Optional[Sequence[str]] = None,
) -> pd.Series:
    """Read a label vector.

    Parameters
    ----------
    path : PathLike
        CSV/TSV with sample identifiers in the first column, or an .h5ad
        file whose ``obs`` holds the labels
    column : str, optional
        Label column. Defaults to the first data column (required for h5ad).
    samples : Sequence[str], optional
        Reorder labels to these sample identifiers; absent samples become NaN

    Returns
    -------
    pd.Series
        Labels indexed by sample identifier
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Label table not found: {path}")

    if path.suffix.lower() in H5AD_SUFFIXES:
        import scanpy as sc

        if column is None:
            raise ValueError("A label column is required to read labels from h5ad")
        obs = sc.read_h5ad(path).obs
    else:
        sep = "\t" if path.suffix.lower() in TSV_SUFFIXES else ","
        obs = pd.read_csv(path, sep=sep, index_col=0)

    if column is None:
        if obs.shape[1] == 0:
            raise ValueError(f"Label table {path} has no label column")
        column = obs.columns[0]
    if column not in obs.columns:
        raise KeyError(f"Label column '{column}' not in {path} (columns: {list(obs.columns)})")

    labels = obs[column].copy()
    labels.index = labels.index.astype(str)
    if samples is not None:
        labels = labels.reindex([str(s) for s in samples])
    return labels


def load_marker_file(path: PathLike) -> Any:
    """Read markers from JSON or YAML into a MarkerSet.

    Accepts ``{label: [genes]}``, ``{label: {other: [genes]}}`` or the
    ``MarkerSet.to_dict`` layout.
    """
    from ..core.reference.markers import MarkerSet

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Marker file not found: {path}")
    with open(path, "r") as f:
        if path.suffix.lower() == ".json":
            data = json.load(f)
        else:
            data = yaml.safe_load(f)
    return MarkerSet.coerce(data)


def write_dataframe(df: pd.DataFrame, path: PathLike, *, index: bool = False) -> Path:
    """Write DataFrame to path ensuring the parent directory exists."""
    output_path = Path(path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(output_path, index=index)
    return output_path


def save_reference(reference: Any, path: PathLike) -> Path:
    """Persist a TrainedReference for reuse across test datasets."""
    output_path = Path(path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    joblib.dump(reference, output_path, compress=3)
    logger.info("Saved trained reference to %s", output_path)
    return output_path


def load_reference(path: PathLike) -> Any:
    """Load a TrainedReference written by :func:`save_reference`."""
    from ..core.reference.engine import TrainedReference

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Trained reference not found: {path}")
    reference = joblib.load(path)
    if not isinstance(reference, TrainedReference):
        raise TypeError(f"{path} does not contain a TrainedReference")
    return reference
