#!/usr/bin/env python
# coding: utf-8


"""
Package-wide logger for methdeconv.

Features
--------
- Console output on stdout; a timestamped file under \
``<METHDECONV_LOG_DIR>/log/`` only when that variable is set
- :class:`ProgressAwareLogger` wraps one ``tqdm`` bar for the per-contrast \
discovery loop (``progress`` to open, ``progress_update`` to advance). The \
next regular log record closes it.
"""


from __future__ import annotations

import logging
import os
import sys
from datetime import datetime
from typing import Optional

from tqdm import tqdm

LOG_DIR_ENV = "METHDECONV_LOG_DIR"


class ProgressAwareLogger(logging.Logger):
    """Logger holding at most one tqdm bar, closed by the next record."""

    def __init__(self, name) -> None:
        super().__init__(name)
        self._pbar = None

    def _close_pbar(self) -> None:
        if self._pbar is not None:
            self._pbar.close()
            self._pbar = None

    def progress(self, msg: str, total: Optional[int] = None) -> None:
        """
        Open a bar labelled ``msg`` with ``total`` steps (open-ended when None),
        replacing any active one. Nothing is drawn below INFO.
        """
        self._close_pbar()
        if not self.isEnabledFor(logging.INFO):
            return
        self._pbar = tqdm(
            total=total if total is not None else 0,
            bar_format="{l_bar}{bar}| {n_fmt}/{total_fmt}",
            file=sys.stdout,
        )
        self._pbar.set_description(msg)

    def progress_update(self, n: int = 1) -> None:
        """Advance the active bar; no-op without one."""
        if self._pbar is not None:
            self._pbar.update(n)

    # every record closes the bar first
    def info(self, msg: str, *a: object, **k: object) -> None:
        self._close_pbar()
        super().info(msg, *a, **k)

    def warning(self, msg: str, *a: object, **k: object) -> None:
        self._close_pbar()
        super().warning(msg, *a, **k)

    def error(self, msg: str, *a: object, **k: object) -> None:
        self._close_pbar()
        super().error(msg, *a, **k)

    def debug(self, msg: str, *a: object, **k: object) -> None:
        self._close_pbar()
        super().debug(msg, *a, **k)


logging.setLoggerClass(ProgressAwareLogger)


def _configure_logger(
    name: str = "methdeconv", output_dir: Optional[str] = None
) -> logging.Logger:
    """
    Attach handlers to ``name`` once and set it to INFO.

    The log file goes to ``<output_dir>/log/``; ``output_dir`` defaults to
    ``$METHDECONV_LOG_DIR`` and without either only stdout is used.
    """
    logger = logging.getLogger(name)

    if logger.handlers:
        return logger

    logger.setLevel(logging.INFO)

    formatter = logging.Formatter(
        "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(formatter)
    logger.addHandler(console)

    output_dir = output_dir or os.environ.get(LOG_DIR_ENV)
    if output_dir:
        log_dir = os.path.join(output_dir, "log")
        os.makedirs(log_dir, exist_ok=True)

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        log_file = os.path.join(log_dir, f"{name}_{timestamp}.log")

        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


logger = _configure_logger()


def get_logger(name: str = "methdeconv") -> logging.Logger:
    """Logger used across the package."""
    return logging.getLogger(name)

