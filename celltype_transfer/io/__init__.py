"""I/O utilities for CellType-Transfer.

Provides logging, table loading and reference persistence.
"""

from .logging import get_logger, log_json, log_yaml
from .tables import (
    as_expression_frame,
    ensure_output_dir,
    load_expression_matrix,
    load_labels,
    load_marker_file,
    load_reference,
    save_reference,
    write_dataframe,
)

__all__ = [
    # Logging
    "get_logger",
    "log_json",
    "log_yaml",
    # Tables
    "as_expression_frame",
    "ensure_output_dir",
    "load_expression_matrix",
    "load_labels",
    "load_marker_file",
    "write_dataframe",
    # Persistence
    "save_reference",
    "load_reference",
]
