#!/usr/bin/env python
# coding: utf-8


"""
Input validation for per-contrast differential testing.

Features
--------
- Conservative memory estimate for the full-panel regression with an early \
MemoryError when the projected peak would not fit
- Construction of the intercept + in-group indicator design for one contrast
- Group-size checks so every contrast can be tested (two samples per group \
for Welch's test, three samples overall for the pooled test)
- Methylation-matrix checks: finite values, with a warning for values \
outside [0, 1]
"""

from __future__ import annotations

import numpy as np
import pandas as pd

from methdeconv.exceptions import ConfigurationError
from methdeconv.utils.logger import logger

try:
    import psutil
except ImportError:
    psutil = None
    logger.debug("psutil not installed, `check_analysis_memory` is unavailable.")


def check_analysis_memory(beta: pd.DataFrame, warn_threshold_gb: float = 8.0) -> dict:
    """
    Estimate the RAM needed to test every site of a panel.

    The per-contrast regression keeps roughly four matrix-sized arrays alive
    (values, fitted coefficients, region means, test statistics).

    Parameters
    ----------
    beta : pd.DataFrame
        Sites × samples methylation matrix.
    warn_threshold_gb : float, default 8.0
        Warn when the projected peak exceeds this value.

    Returns
    -------
    dict
        Keys: ``data_gb``, ``peak_gb``, ``available_gb``.

    Raises
    ------
    MemoryError
        If the projected peak exceeds ~85% of available RAM.
    """
    if psutil is None:
        logger.debug("psutil not available - skipping memory safety check")
        return {"data_gb": np.nan, "peak_gb": np.nan, "available_gb": np.nan}

    data_gb = beta.memory_usage(deep=True).sum() / (1024**3)
    estimated_peak_gb = data_gb * 4.0
    available_gb = psutil.virtual_memory().available / (1024**3)

    logger.debug(
        f"Methylation matrix: {data_gb:.2f} GB → estimated peak: "
        f"{estimated_peak_gb:.2f} GB"
    )

    if estimated_peak_gb > available_gb * 0.85:
        raise MemoryError(
            f"Projected memory usage (~{estimated_peak_gb:.1f} GB) exceeds "
            f"85% of available RAM ({available_gb:.1f} GB). Restrict the panel "
            "to the target coordinates before discovery."
        )
    elif estimated_peak_gb > warn_threshold_gb:
        logger.warning(f"Large analysis detected (~{estimated_peak_gb:.1f} GB peak).")

    return {
        "data_gb": data_gb,
        "peak_gb": estimated_peak_gb,
        "available_gb": available_gb,
    }


def validate_beta(beta: pd.DataFrame) -> np.ndarray:
    """
    Return the methylation matrix as a float array after sanity checks.

    Raises
    ------
    ValueError
        If the matrix is empty or contains missing / non-finite values.
    """
    if not isinstance(beta, pd.DataFrame):
        raise TypeError("beta must be a pandas DataFrame")
    if beta.empty:
        raise ValueError("beta matrix is empty")

    values = beta.to_numpy(dtype=float)
    n_bad = int((~np.isfinite(values)).sum())
    if n_bad:
        raise ValueError(
            f"beta contains {n_bad} missing or non-finite values; impute or drop "
            "those sites during preprocessing"
        )
    if values.min() < 0.0 or values.max() > 1.0:
        logger.warning("beta contains values outside [0, 1]; are these M-values?")
    return values


def build_contrast_design(
    cell: pd.Series, contrast: pd.Series
) -> pd.DataFrame:
    """
    Intercept + in-group indicator design for one contrast.

    Parameters
    ----------
    cell : pd.Series
        Cell-type label per sample (index = sample ids).
    contrast : pd.Series
        Boolean in-group flag per cell type (index = cell-type levels).

    Returns
    -------
    pd.DataFrame
        Samples × ``["intercept", "in_group"]`` float design.
    """
    in_group = set(str(c) for c, v in contrast.items() if v)
    indicator = cell.astype(str).isin(in_group).astype(float)
    return pd.DataFrame(
        {"intercept": np.ones(len(cell)), "in_group": indicator.to_numpy()},
        index=cell.index,
    )


def check_group_sizes(
    design: pd.DataFrame, equal_var: bool, label: str = ""
) -> None:
    """
    Make sure both groups of a contrast can be tested.

    Raises
    ------
    ConfigurationError
        If a group is empty, or (Welch) has fewer than two samples, or
        (pooled) the contrast has fewer than three samples overall.
    """
    n_in = int(design["in_group"].sum())
    n_out = int(len(design) - n_in)
    where = f" for contrast '{label}'" if label else ""

    if n_in == 0 or n_out == 0:
        raise ConfigurationError(f"contrast has an empty group{where}")
    if equal_var:
        if n_in + n_out < 3:
            raise ConfigurationError(
                f"pooled t-test needs at least three samples{where}"
            )
    elif min(n_in, n_out) < 2:
        raise ConfigurationError(
            f"Welch t-test needs two samples per group{where} "
            f"(in-group {n_in}, out-group {n_out}); set equal_var=True"
        )
