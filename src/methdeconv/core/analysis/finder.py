#!/usr/bin/env python
# coding: utf-8


"""
Per-contrast discovery of cell type-specific regions and sites.

Features
--------
- Per-site regression of methylation on the in-group indicator, optional \
cluster-restricted smoothing and bump segmentation into candidate regions
- Region-level and site-level two-group tests with BH-adjusted p-values
- Retention, direction split, ranking and capping of regions and sites; \
merged region + site lists when both are requested
- Pure function of its inputs, so contrasts can be processed in any order \
or in parallel
"""


from typing import Union

import numpy as np
import pandas as pd

from methdeconv.config.config_manager import DiscoveryConfig
from methdeconv.core.analysis.core_analysis import (
    fit_site_coefficients,
    smooth_by_cluster,
)
from methdeconv.core.analysis.postprocessing import (
    CANDIDATE_COLUMNS,
    concat_candidates,
    empty_candidates,
    merge_candidates,
    score_regions,
    score_sites,
    select_regions,
    select_sites,
)
from methdeconv.core.analysis.regions import find_bumps
from methdeconv.core.analysis.validation import (
    build_contrast_design,
    check_group_sizes,
)
from methdeconv.core.clustering import cluster_sizes
from methdeconv.core.contrasts import contrast_label

OUTPUT_COLUMNS = CANDIDATE_COLUMNS + ["cell_type", "contrast"]


def find_contrast_candidates(
    beta: Union[pd.DataFrame, np.ndarray],
    chrom: np.ndarray,
    pos: np.ndarray,
    clusters: np.ndarray,
    cell: pd.Series,
    contrast: pd.Series,
    config: DiscoveryConfig,
    contrast_index: int = 0,
) -> pd.DataFrame:
    """
    Candidate regions and sites discriminating one contrast's in-group.

    Parameters
    ----------
    beta : pd.DataFrame or np.ndarray
        Sites × samples methylation values, sites in (chromosome, position)
        order, no missing values.
    chrom, pos : np.ndarray
        Chromosome and position of every site.
    clusters : np.ndarray
        Cluster id of every site (see :func:`cluster_sites`).
    cell : pd.Series
        Cell-type label per sample, aligned with the columns of ``beta``.
    contrast : pd.Series
        Boolean in-group flag per cell type.
    config : DiscoveryConfig
        Discovery thresholds.
    contrast_index : int, default 0
        Position of the contrast in the contrast matrix, stored in the
        ``contrast`` column so concatenated results can be re-ordered.

    Returns
    -------
    pd.DataFrame
        "up" candidates followed by "down" candidates, with the candidate
        columns plus ``cell_type`` (contrast label) and ``contrast``. May be
        empty.

    Raises
    ------
    ConfigurationError
        If a group of the contrast is too small for the requested test.
    """
    Y = np.asarray(beta, dtype=float)
    if Y.shape[0] != len(chrom) or Y.shape[0] != len(clusters):
        raise ValueError("beta rows must match chrom, pos and clusters")
    if Y.shape[1] != len(cell):
        raise ValueError("beta columns must match the cell-type labels")

    label = contrast_label(contrast)
    design = build_contrast_design(cell, contrast)
    check_group_sizes(design, config.equal_var, label)
    in_group = design["in_group"].to_numpy()

    regions_up = regions_down = empty_candidates()
    if config.include_dmrs:
        coef = fit_site_coefficients(Y, design.to_numpy())
        if config.smooth:
            coef = smooth_by_cluster(
                coef,
                clusters,
                window=config.smooth_window,
                min_sites=config.smooth_min_sites,
            )
        bumps = find_bumps(coef, clusters, config.bumphunter_beta_cutoff)
        scored = score_regions(
            bumps, Y, in_group, chrom, pos, equal_var=config.equal_var
        )
        regions_up, regions_down = select_regions(scored, config)

    if config.include_cpgs:
        sites = score_sites(
            Y,
            in_group,
            chrom,
            pos,
            cluster_sizes(clusters),
            equal_var=config.equal_var,
        )
        sites_up, sites_down = select_sites(sites, config)
        if config.include_dmrs:
            up = merge_candidates(regions_up, sites_up, "up", config.num_regions)
            down = merge_candidates(
                regions_down, sites_down, "down", config.num_regions
            )
        else:
            up, down = sites_up, sites_down
    else:
        up, down = regions_up, regions_down

    out = concat_candidates([up, down], extra=["cell_type", "contrast"])
    out["cell_type"] = label
    out["contrast"] = int(contrast_index)
    return out[OUTPUT_COLUMNS].reset_index(drop=True)
