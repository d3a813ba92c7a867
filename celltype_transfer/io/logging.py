"""Run logs for CellType-Transfer.

Each CLI run writes a log file into its output directory, records the
effective configuration as a YAML document in that log, and appends a
one-line JSON summary to ``runs.jsonl``.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import yaml

PathLike = Union[str, Path]

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Marks handlers owned by get_logger
_RUN_HANDLER = "_celltype_transfer_run_log"


def get_logger(
    name: str,
    log_path: PathLike,
    level: int = logging.INFO,
    timestamped: bool = True,
) -> Tuple[logging.Logger, Path]:
    """Send the named logger to a run log file.

    A previous run log attached by this function is closed and replaced;
    console handlers are not touched.

    Parameters
    ----------
    name : str
        Logger name (usually ``celltype_transfer``)
    log_path : PathLike
        Log file, e.g. ``out/classify.log``. With ``timestamped`` the run
        start time is added to the stem (``classify_20250101_120000.log``)
        so repeated runs into one directory keep their logs.
    level : int
        Minimum level written to the file
    timestamped : bool
        Add the timestamp; otherwise an existing file is overwritten

    Returns
    -------
    Tuple[logging.Logger, Path]
        The logger and the file actually written
    """
    path = Path(log_path)
    if timestamped:
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        path = path.with_name(f"{path.stem}_{stamp}{path.suffix or '.log'}")
    path.parent.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(name)
    logger.setLevel(min(level, logger.level or level))
    for handler in [h for h in logger.handlers if getattr(h, _RUN_HANDLER, False)]:
        logger.removeHandler(handler)
        handler.close()

    handler = logging.FileHandler(path, mode="w", encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT))
    setattr(handler, _RUN_HANDLER, True)
    logger.addHandler(handler)
    return logger, path


def log_json(log_path: PathLike, record: Dict[str, Any]) -> None:
    """Append one JSON line to log_path (non-JSON values via str)."""
    path = Path(log_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(record, default=str) + "\n")


def log_yaml(
    log_path: Optional[PathLike],
    record: Dict[str, Any],
    *,
    logger: Optional[logging.Logger] = None,
) -> None:
    """Write record as a YAML document ending in ``---``.

    Goes to ``logger`` at INFO when one is given, else appended to
    log_path.
    """
    document = yaml.safe_dump(record, sort_keys=False).rstrip("\n") + "\n---"
    if logger is not None:
        logger.info("%s", document)
        return

    path = Path(log_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(document + "\n")
