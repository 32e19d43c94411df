#!/usr/bin/env python
# coding: utf-8


"""
Statistical engines for per-contrast differential methylation testing.

Features
--------
- Vectorised per-site least-squares fit of methylation on the in-group \
indicator (one pseudo-inverse of XᵀX per contrast)
- Cluster-restricted running-mean smoothing of the per-site coefficients
- Row-wise two-group t-tests (Welch or pooled) over sites or region means, \
with deterministic handling of zero-variance rows
- Benjamini-Hochberg adjustment via statsmodels
"""


from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from scipy import linalg, stats
from statsmodels.stats.multitest import multipletests


def fit_site_coefficients(Y: np.ndarray, X: np.ndarray, coef: int = 1) -> np.ndarray:
    """
    Least-squares coefficient of one design column for every site.

    Parameters
    ----------
    Y : np.ndarray
        Sites × samples response matrix.
    X : np.ndarray
        Samples × coefficients design matrix.
    coef : int, default 1
        Design column whose coefficient is returned (the in-group indicator).

    Returns
    -------
    np.ndarray
        One coefficient per site. With an intercept + 0/1 indicator design this
        is the in-group mean minus the out-group mean.
    """
    Y = np.asarray(Y, dtype=float)
    X = np.asarray(X, dtype=float)
    if Y.shape[1] != X.shape[0]:
        raise ValueError("Y columns != design rows")

    XtX_inv = linalg.pinv(X.T @ X)
    beta_hat = XtX_inv @ (X.T @ Y.T)
    return beta_hat[coef]


def smooth_by_cluster(
    stat: np.ndarray, clusters: np.ndarray, window: int = 5, min_sites: int = 7
) -> np.ndarray:
    """
    Centred running mean of ``stat`` that never crosses a cluster boundary.

    Windows are truncated at cluster edges. Clusters with fewer than
    ``min_sites`` sites are returned unchanged.

    Parameters
    ----------
    stat : np.ndarray
        Per-site statistic, in site order.
    clusters : np.ndarray
        Cluster id per site (non-decreasing).
    window : int, default 5
        Odd window width in sites.
    min_sites : int, default 7
        Smallest cluster that is smoothed.

    Returns
    -------
    np.ndarray
        Smoothed statistic (new array).
    """
    stat = np.asarray(stat, dtype=float)
    clusters = np.asarray(clusters)
    n = stat.size
    if n == 0:
        return stat.copy()

    half = window // 2
    idx = np.arange(n)
    is_start = np.concatenate(([True], clusters[1:] != clusters[:-1]))
    is_end = np.concatenate((clusters[1:] != clusters[:-1], [True]))
    start_of = np.maximum.accumulate(np.where(is_start, idx, 0))
    end_pos = np.flatnonzero(is_end)
    end_of = end_pos[np.searchsorted(end_pos, idx)]

    lo = np.maximum(idx - half, start_of)
    hi = np.minimum(idx + half, end_of)
    csum = np.concatenate(([0.0], np.cumsum(stat)))
    smoothed = (csum[hi + 1] - csum[lo]) / (hi - lo + 1)

    size = end_of - start_of + 1
    return np.where(size >= min_sites, smoothed, stat)


@dataclass
class TTestResult:
    dm: np.ndarray
    t: np.ndarray
    p_value: np.ndarray
    df: np.ndarray


def row_ttests(Y: np.ndarray, in_group: np.ndarray, equal_var: bool = False) -> TTestResult:
    """
    Two-group t-test on every row of ``Y``.

    ``dm`` is the out-group mean minus the in-group mean, so a negative ``dm``
    means the in-group is more methylated.

    Parameters
    ----------
    Y : np.ndarray
        Rows (sites or regions) × samples.
    in_group : np.ndarray
        Boolean (or 0/1) flag per sample.
    equal_var : bool, default False
        ``False``: Welch's unequal-variance test with Welch-Satterthwaite
        degrees of freedom. ``True``: pooled-variance Student test.

    Returns
    -------
    TTestResult
        ``dm``, ``t``, two-sided ``p_value`` and degrees of freedom per row.
        A row with zero standard error gets ``t = ±inf, p = 0`` when its means
        differ and ``t = 0, p = 1`` when they do not.
    """
    Y = np.atleast_2d(np.asarray(Y, dtype=float))
    grp = np.asarray(in_group).astype(bool)
    if Y.shape[1] != grp.size:
        raise ValueError("Y columns != length of in_group")

    y1, y0 = Y[:, grp], Y[:, ~grp]
    n1, n0 = y1.shape[1], y0.shape[1]
    if n1 == 0 or n0 == 0:
        raise ValueError("both groups need at least one sample")

    dm = y0.mean(axis=1) - y1.mean(axis=1)
    v1 = y1.var(axis=1, ddof=1) if n1 > 1 else np.zeros(Y.shape[0])
    v0 = y0.var(axis=1, ddof=1) if n0 > 1 else np.zeros(Y.shape[0])

    with np.errstate(divide="ignore", invalid="ignore"):
        if equal_var:
            df = np.full(Y.shape[0], float(n1 + n0 - 2))
            pooled = ((n1 - 1) * v1 + (n0 - 1) * v0) / df
            se = np.sqrt(pooled * (1.0 / n1 + 1.0 / n0))
        else:
            a, b = v1 / n1, v0 / n0
            se = np.sqrt(a + b)
            denom = (a**2 / max(n1 - 1, 1)) + (b**2 / max(n0 - 1, 1))
            df = np.where(denom > 0, (a + b) ** 2 / denom, float(n1 + n0 - 2))

        t_stat = dm / se

    zero_se = se == 0
    t_stat = np.where(zero_se & (dm == 0), 0.0, t_stat)
    t_stat = np.where(zero_se & (dm != 0), np.where(dm > 0, np.inf, -np.inf), t_stat)
    p_value = 2.0 * stats.t.sf(np.abs(t_stat), df)

    return TTestResult(dm=dm, t=t_stat, p_value=p_value, df=df)


def adjust_pvalues(pvals: np.ndarray, method: str = "fdr_bh") -> np.ndarray:
    """
    Multiple-testing adjustment via statsmodels; NaN p-values are treated as 1.
    """
    arr = np.asarray(pvals, dtype=float).copy()
    if arr.size == 0:
        return arr
    arr[np.isnan(arr)] = 1.0
    _, adj, _, _ = multipletests(arr, method=method)
    return adj
