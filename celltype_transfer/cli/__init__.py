"""Command-line interface for CellType-Transfer.

Provides CLI commands for marker selection, reference training and
classification.

Example Usage
-------------
    # From command line:
    celltype-transfer --help
    celltype-transfer train -r ref.h5ad --label-column cell_type -o model/
    celltype-transfer classify -t test.h5ad -m model/reference.joblib -o out/
"""

from .main import cli, main

__all__ = [
    "cli",
    "main",
]
