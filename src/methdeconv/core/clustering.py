#!/usr/bin/env python
# coding: utf-8


"""
Genomic clustering of measured sites.

Sites ordered by (chromosome, position) are split into clusters: a new cluster
starts at every chromosome change and wherever the gap to the previous site
exceeds ``max_gap``. Clusters bound the candidate regions found by bump
hunting; no region may cross a cluster boundary.
"""


from typing import Sequence

import numpy as np
import pandas as pd


def cluster_sites(
    chrom: Sequence[str], pos: Sequence[int], max_gap: int = 300
) -> np.ndarray:
    """
    Assign a cluster id to every site in a single linear pass.

    Parameters
    ----------
    chrom : sequence of str
        Chromosome of each site.
    pos : sequence of int
        Position of each site.
    max_gap : int, default 300
        Largest distance (bp) between consecutive sites of one cluster.

    Returns
    -------
    np.ndarray
        Integer ids starting at 1, non-decreasing, same length as the input.

    Raises
    ------
    ValueError
        If lengths differ, ``max_gap`` is negative, or the sites are not ordered
        (positions decrease within a chromosome, or a chromosome re-appears
        after another one).
    """
    chrom = np.asarray(chrom, dtype=object)
    pos = np.asarray(pos, dtype=np.int64)
    if chrom.shape != pos.shape:
        raise ValueError("chrom and pos must have the same length")
    if max_gap < 0:
        raise ValueError("max_gap must be non-negative")
    if pos.size == 0:
        return np.zeros(0, dtype=np.int64)

    new_chr = np.concatenate(([True], chrom[1:] != chrom[:-1]))
    gaps = np.diff(pos, prepend=pos[0])

    if np.any(gaps[~new_chr] < 0):
        raise ValueError("sites must be sorted by position within each chromosome")
    run_starts = chrom[new_chr]
    if len(set(run_starts)) != len(run_starts):
        raise ValueError("sites of one chromosome must be contiguous")

    breaks = new_chr | (gaps > max_gap)
    return np.cumsum(breaks).astype(np.int64)


def cluster_sizes(clusters: np.ndarray) -> np.ndarray:
    """Number of sites in each site's cluster."""
    clusters = np.asarray(clusters)
    counts = pd.Series(clusters).map(pd.Series(clusters).value_counts())
    return counts.to_numpy(dtype=np.int64)
