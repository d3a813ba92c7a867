"""Test fixtures for CellType-Transfer.

Provides synthetic expression data generators.
"""

from .mock_data import (
    LABELS,
    OFF_REFERENCE_LABEL,
    TransferDataset,
    create_expression_adata,
    create_transfer_dataset,
    signature_genes,
)

__all__ = [
    "LABELS",
    "OFF_REFERENCE_LABEL",
    "TransferDataset",
    "create_expression_adata",
    "create_transfer_dataset",
    "signature_genes",
]
