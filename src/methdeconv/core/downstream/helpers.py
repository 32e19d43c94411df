#!/usr/bin/env python
# coding: utf-8


"""
General-purpose utilities shared by marker assembly and deconvolution.

Features
--------
- Robust chromosome identifier normalisation with automatic 'chr' prefix \
addition and preservation of X/Y conventions
- Group-wise summarisation of per-sample methylation values (used for the \
per-cell-type profile matrix)
- Explicit genomic overlap of site records (chr, pos) with interval records \
(chr, start, end), replacing an interval-algebra library
- Stable marker identifiers derived from coordinates
"""


from typing import Callable, Dict, List

import numpy as np
import pandas as pd


def _clean_chr(ch: str) -> str:
    """
    Standardise chromosome identifiers to the canonical UCSC format.

    - ``"1"``, ``"chr1"``, ``"CHR1"`` → ``"chr1"``
    - ``"X"``, ``"chrx"``, ``"ChrX"`` → ``"chrX"``
    - ``"Y"`` → ``"chrY"``

    ``None`` is returned unchanged.
    """
    if ch is None:
        return ch
    ch = str(ch).strip()
    if not ch.lower().startswith("chr"):
        ch = "chr" + ch

    if ch.lower() in {"chrx", "chry"}:
        return ch[:3] + ch[3:].upper()
    return ch.lower()


def marker_ids(chrom, start, end) -> List[str]:
    """Coordinate identifiers ``"{chr}:{start}-{end}"`` for interval records."""
    return [f"{c}:{int(s)}-{int(e)}" for c, s, e in zip(chrom, start, end)]


def summarize_groups(
    values: pd.DataFrame,
    groups: pd.Series,
    levels: List[str],
    summary_func: Callable = np.mean,
) -> pd.DataFrame:
    """
    Summarise a features × samples matrix per sample group.

    Parameters
    ----------
    values : pd.DataFrame
        Features (rows) × samples (columns).
    groups : pd.Series
        Sample-to-group mapping; index must cover ``values.columns``.
    levels : list of str
        Groups to report, in column order.
    summary_func : callable, default ``np.mean``
        Row-wise aggregation applied to each group's samples.

    Returns
    -------
    pd.DataFrame
        Features × ``levels``. A level without samples yields a NaN column.
    """
    groups = groups.reindex(values.columns).astype(str)
    result: Dict[str, pd.Series] = {}
    for g in levels:
        cols = groups.index[groups == str(g)]
        if len(cols) == 0:
            result[g] = pd.Series(np.nan, index=values.index)
            continue
        result[g] = pd.Series(
            summary_func(values[cols].to_numpy(dtype=float), axis=1),
            index=values.index,
        )
    return pd.DataFrame(result, index=values.index, columns=list(levels))


def overlap_sites(
    site_chr: np.ndarray,
    site_pos: np.ndarray,
    intervals: pd.DataFrame,
    chr_col: str = "chr",
    start_col: str = "start",
    end_col: str = "end",
) -> List[np.ndarray]:
    """
    Positional indices of the sites falling inside each interval (inclusive).

    Sites are looked up per chromosome on a position-sorted copy, so each
    interval costs two binary searches.

    Parameters
    ----------
    site_chr, site_pos : array-like
        Chromosome and position of every site (any order).
    intervals : pd.DataFrame
        One row per interval with chromosome, start and end columns.

    Returns
    -------
    list of np.ndarray
        One array of site indices per interval row, in ascending order.
    """
    site_chr = np.asarray([_clean_chr(c) for c in site_chr], dtype=object)
    site_pos = np.asarray(site_pos, dtype=np.int64)

    by_chr = {}
    for ch in pd.unique(site_chr):
        idx = np.flatnonzero(site_chr == ch)
        order = np.argsort(site_pos[idx], kind="mergesort")
        by_chr[ch] = (site_pos[idx][order], idx[order])

    hits = []
    for ch, s, e in zip(
        intervals[chr_col], intervals[start_col], intervals[end_col]
    ):
        entry = by_chr.get(_clean_chr(ch))
        if entry is None:
            hits.append(np.array([], dtype=np.int64))
            continue
        pos_sorted, idx_sorted = entry
        lo = np.searchsorted(pos_sorted, int(s), side="left")
        hi = np.searchsorted(pos_sorted, int(e), side="right")
        hits.append(np.sort(idx_sorted[lo:hi]))
    return hits
