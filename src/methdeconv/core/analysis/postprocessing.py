#!/usr/bin/env python
# coding: utf-8


"""
Scoring, filtering and ranking of candidate regions and sites for one contrast.

Features
--------
- Region-level methylation (per-sample mean over a region's sites) and \
two-group tests on those means
- Retention of multi-site regions, or single-site regions when the cluster \
allows nothing larger, below a p-value cutoff
- Direction split into "up" (in-group methylated, out-group not) and "down" \
(the reverse) with maximum-deviation bounds from the ideal 0/1 pattern
- Site-level candidates ranked by difference of means
- Deterministic, stable ranking (L descending, then dm) and per-direction \
caps; region and site lists merged with coordinate de-duplication
"""


from typing import List, Sequence, Tuple

import numpy as np
import pandas as pd

from methdeconv.config.config_manager import DiscoveryConfig
from methdeconv.core.analysis.core_analysis import adjust_pvalues, row_ttests

CANDIDATE_COLUMNS = [
    "chr",
    "start",
    "end",
    "index_start",
    "index_end",
    "L",
    "cluster_L",
    "dm",
    "t",
    "p_value",
    "padj",
    "max_diff",
    "marker_type",
    "direction",
]

COORDINATES = ["chr", "start", "end"]


def empty_candidates(extra: Sequence[str] = ()) -> pd.DataFrame:
    """Empty candidate table with the canonical columns."""
    return pd.DataFrame(columns=CANDIDATE_COLUMNS + list(extra))


def concat_candidates(frames: List[pd.DataFrame], extra: Sequence[str] = ()) -> pd.DataFrame:
    """Concatenate candidate tables, skipping empty ones."""
    frames = [f for f in frames if f is not None and not f.empty]
    if not frames:
        return empty_candidates(extra)
    return pd.concat(frames, ignore_index=True)


def region_means(
    Y: np.ndarray, index_start: Sequence[int], index_end: Sequence[int]
) -> np.ndarray:
    """
    Per-sample mean methylation of every region.

    Parameters
    ----------
    Y : np.ndarray
        Sites × samples matrix.
    index_start, index_end : sequence of int
        Inclusive 0-based site range of each region.

    Returns
    -------
    np.ndarray
        Regions × samples.
    """
    Y = np.asarray(Y, dtype=float)
    if len(index_start) == 0:
        return np.empty((0, Y.shape[1]))
    return np.vstack(
        [Y[int(s) : int(e) + 1].mean(axis=0) for s, e in zip(index_start, index_end)]
    )


def rank_candidates(df: pd.DataFrame, direction: str) -> pd.DataFrame:
    """
    Stable sort by L descending, then dm ascending ("up") or descending ("down").
    """
    if df.empty:
        return df
    dm = df["dm"].to_numpy(dtype=float)
    key = dm if direction == "up" else -dm
    order = np.lexsort((key, -df["L"].to_numpy(dtype=np.int64)))
    return df.iloc[order].reset_index(drop=True)


def score_regions(
    bumps: pd.DataFrame,
    Y: np.ndarray,
    in_group: np.ndarray,
    chrom: np.ndarray,
    pos: np.ndarray,
    equal_var: bool = False,
) -> pd.DataFrame:
    """
    Test every bump on its region-level methylation.

    Adds coordinates, ``dm`` / ``t`` / ``p_value`` / ``padj`` and the maximum
    absolute deviations from the ideal "up" pattern (``in_group``) and the ideal
    "down" pattern (``1 - in_group``). Bump order is preserved.
    """
    if bumps.empty:
        return empty_candidates(["up_max_diff", "down_max_diff", "area"])

    ind = np.asarray(in_group, dtype=float)
    starts = bumps["index_start"].to_numpy(dtype=np.int64)
    ends = bumps["index_end"].to_numpy(dtype=np.int64)
    y_regions = region_means(Y, starts, ends)
    tt = row_ttests(y_regions, ind.astype(bool), equal_var=equal_var)

    return pd.DataFrame(
        {
            "chr": np.asarray(chrom)[starts],
            "start": np.asarray(pos)[starts],
            "end": np.asarray(pos)[ends],
            "index_start": starts,
            "index_end": ends,
            "L": bumps["L"].to_numpy(dtype=np.int64),
            "cluster_L": bumps["cluster_L"].to_numpy(dtype=np.int64),
            "dm": tt.dm,
            "t": tt.t,
            "p_value": tt.p_value,
            "padj": adjust_pvalues(tt.p_value),
            "up_max_diff": np.abs(y_regions - ind).max(axis=1),
            "down_max_diff": np.abs(y_regions - (1.0 - ind)).max(axis=1),
            "area": bumps["area"].to_numpy(dtype=float),
        }
    )


def select_regions(
    scored: pd.DataFrame, config: DiscoveryConfig
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Filter and rank scored regions into "up" and "down" lists.

    Returns
    -------
    (pd.DataFrame, pd.DataFrame)
        Up and down candidates, each ranked and capped at ``num_regions``.
    """
    if scored.empty:
        return empty_candidates(), empty_candidates()

    L = scored["L"]
    keep = ((L > 1) | ((L == 1) & (scored["cluster_L"] == 1))) & (
        scored["p_value"] < config.dmr_pval_cutoff
    )

    out = []
    for direction, sign_ok, diff_col, cutoff in (
        ("up", scored["dm"] < 0, "up_max_diff", config.dmr_up_cutoff),
        ("down", scored["dm"] > 0, "down_max_diff", config.dmr_down_cutoff),
    ):
        sel = scored[keep & sign_ok & (scored[diff_col] < cutoff)].copy()
        sel["max_diff"] = sel[diff_col]
        sel["marker_type"] = "region"
        sel["direction"] = direction
        sel = rank_candidates(sel[CANDIDATE_COLUMNS], direction)
        out.append(sel.head(config.num_regions))
    return out[0], out[1]


def score_sites(
    Y: np.ndarray,
    in_group: np.ndarray,
    chrom: np.ndarray,
    pos: np.ndarray,
    cluster_L: np.ndarray,
    equal_var: bool = False,
) -> pd.DataFrame:
    """Test every site individually; one candidate row per site, in site order."""
    tt = row_ttests(Y, np.asarray(in_group).astype(bool), equal_var=equal_var)
    idx = np.arange(np.asarray(Y).shape[0])
    return pd.DataFrame(
        {
            "chr": np.asarray(chrom),
            "start": np.asarray(pos),
            "end": np.asarray(pos),
            "index_start": idx,
            "index_end": idx,
            "L": np.ones(idx.size, dtype=np.int64),
            "cluster_L": np.asarray(cluster_L, dtype=np.int64),
            "dm": tt.dm,
            "t": tt.t,
            "p_value": tt.p_value,
            "padj": adjust_pvalues(tt.p_value),
            "max_diff": np.nan,
            "marker_type": "site",
            "direction": "",
        }
    )


def select_sites(
    scored: pd.DataFrame, config: DiscoveryConfig
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Significant sites split by direction, ordered by ``dm`` and capped at ``num_cpgs``.
    """
    sig = scored[scored["p_value"] < config.cpg_pval_cutoff]

    up = sig.sort_values("dm", ascending=True, kind="mergesort")
    up = up[up["dm"] < config.cpg_up_dm_cutoff].head(config.num_cpgs).copy()
    up["direction"] = "up"

    down = sig.sort_values("dm", ascending=False, kind="mergesort")
    down = down[down["dm"] > config.cpg_down_dm_cutoff].head(config.num_cpgs).copy()
    down["direction"] = "down"

    return up.reset_index(drop=True), down.reset_index(drop=True)


def merge_candidates(
    regions: pd.DataFrame, sites: pd.DataFrame, direction: str, cap: int
) -> pd.DataFrame:
    """
    Union of region and site candidates of one direction.

    Regions come first, so a site coinciding with a single-site region is
    dropped. The union is re-ranked and capped; sites may fall off when
    higher-ranked regions already fill the quota.
    """
    merged = concat_candidates([regions, sites])
    if merged.empty:
        return merged
    merged = merged.drop_duplicates(subset=COORDINATES, keep="first")
    return rank_candidates(merged, direction).head(cap)
