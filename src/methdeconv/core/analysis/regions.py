#!/usr/bin/env python
# coding: utf-8


"""
Bump segmentation of per-site coefficients.

A site is "up" when its coefficient reaches the cutoff and "down" when it
reaches minus the cutoff. A bump is a maximal run of consecutive sites with the
same direction inside one cluster; a change of direction or of cluster always
ends the run.
"""


import numpy as np
import pandas as pd

from methdeconv.core.clustering import cluster_sizes

# Tolerance for the cutoff comparison, so that a coefficient equal to the cutoff
# up to rounding still counts as reaching it.
_PRECISION = np.sqrt(np.finfo(float).eps)

BUMP_COLUMNS = [
    "index_start",
    "index_end",
    "L",
    "cluster",
    "cluster_L",
    "value",
    "area",
    "sign",
]


def _greater_or_equal(x: np.ndarray, y: float) -> np.ndarray:
    return (x >= y) | (np.abs(x - y) <= _PRECISION)


def site_directions(stat: np.ndarray, cutoff: float) -> np.ndarray:
    """+1 / -1 / 0 per site for coefficients above, below or within the cutoff."""
    stat = np.asarray(stat, dtype=float)
    direction = _greater_or_equal(stat, cutoff).astype(np.int64)
    direction[_greater_or_equal(-stat, cutoff)] = -1
    direction[np.isnan(stat)] = 0
    return direction


def find_bumps(stat: np.ndarray, clusters: np.ndarray, cutoff: float) -> pd.DataFrame:
    """
    Segment sites into bumps.

    Parameters
    ----------
    stat : np.ndarray
        Per-site coefficient (possibly smoothed), in site order.
    clusters : np.ndarray
        Cluster id per site.
    cutoff : float
        Magnitude a coefficient must reach to take part in a bump.

    Returns
    -------
    pd.DataFrame
        One row per bump with ``index_start``, ``index_end`` (0-based,
        inclusive), ``L``, ``cluster``, ``cluster_L``, ``value`` (mean
        coefficient), ``area`` (absolute coefficient sum) and ``sign``.
        Rows are ordered by area, largest first; ties keep up bumps before
        down bumps, each in genomic order.
    """
    stat = np.asarray(stat, dtype=float)
    clusters = np.asarray(clusters)
    if stat.shape != clusters.shape:
        raise ValueError("stat and clusters must have the same length")
    if stat.size == 0:
        return pd.DataFrame(columns=BUMP_COLUMNS)

    direction = site_directions(stat, cutoff)
    change = np.concatenate(
        ([True], (np.diff(direction) != 0) | (clusters[1:] != clusters[:-1]))
    )
    segment = np.cumsum(change)
    in_bump = direction != 0
    if not in_bump.any():
        return pd.DataFrame(columns=BUMP_COLUMNS)

    sizes = cluster_sizes(clusters)
    df = pd.DataFrame(
        {
            "segment": segment[in_bump],
            "index": np.flatnonzero(in_bump),
            "stat": stat[in_bump],
            "sign": direction[in_bump],
            "cluster": clusters[in_bump],
            "cluster_L": sizes[in_bump],
        }
    )
    bumps = df.groupby("segment", sort=True).agg(
        index_start=("index", "min"),
        index_end=("index", "max"),
        cluster=("cluster", "first"),
        cluster_L=("cluster_L", "first"),
        value=("stat", "mean"),
        area=("stat", lambda s: abs(s.sum())),
        sign=("sign", "first"),
    )
    bumps["L"] = bumps["index_end"] - bumps["index_start"] + 1

    # up bumps first, then down bumps, each in genomic order; then by area
    bumps = bumps.sort_values(
        ["sign", "index_start"], ascending=[False, True], kind="mergesort"
    )
    bumps = bumps.sort_values("area", ascending=False, kind="mergesort")
    return bumps[BUMP_COLUMNS].reset_index(drop=True)
