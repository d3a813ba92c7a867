"""Centralized run configuration for CellType-Transfer.

Example
-------
>>> from celltype_transfer.config import TransferConfig, list_presets
>>> print(list_presets())
['bulk', 'default', 'single-cell']
>>> config = TransferConfig.preset("bulk")
"""

from .settings import (
    PRESETS,
    TransferConfig,
    list_presets,
    resolve_preset,
)

__all__ = [
    "PRESETS",
    "TransferConfig",
    "list_presets",
    "resolve_preset",
]
