#!/usr/bin/env python
# coding: utf-8


"""
End-to-end entry points: marker discovery on a reference panel and \
cell-composition estimation on target samples.

Features
--------
- ``find_markers``: configuration validation, memory and input checks, \
one clustering pass, contrast enumeration, per-contrast candidate search \
(serial or joblib workers) and marker-panel assembly
- ``estimate_proportions``: estimation against a ``MarkerPanel`` or a bare \
profile matrix, optionally collapsing site-level targets onto markers first
- Progress reporting through the package logger; per-contrast messages at \
INFO, or DEBUG with a progress bar when ``verbose`` is off
"""


import re
from typing import Any, Dict, Optional, Union

import pandas as pd
from pydantic import ValidationError

from methdeconv.config.config_manager import (
    DeconvolutionConfig,
    DiscoveryConfig,
    MethDeconvConfigModel,
    validate_discovery_config,
)
from methdeconv.core.analysis.finder import find_contrast_candidates
from methdeconv.core.analysis.validation import (
    build_contrast_design,
    check_analysis_memory,
    check_group_sizes,
    validate_beta,
)
from methdeconv.core.clustering import cluster_sites
from methdeconv.core.contrasts import enumerate_contrasts
from methdeconv.core.downstream.deconvolution import (
    collapse_to_markers,
    estimate_cell_composition,
)
from methdeconv.core.downstream.markers import MarkerPanel, assemble_markers
from methdeconv.exceptions import ConfigurationError
from methdeconv.io.data_utils import ReferencePanel
from methdeconv.utils.logger import logger

try:
    import joblib
except ImportError:
    joblib = None
    logger.warning("joblib not installed. Parallel computing unavailable.")

_MARKER_ID = re.compile(r"^(?P<chr>[^:]+):(?P<start>\d+)-(?P<end>\d+)$")


def _marker_kind(config: DiscoveryConfig) -> str:
    if config.include_dmrs and config.include_cpgs:
        return "regions and CpGs"
    return "regions" if config.include_dmrs else "CpGs"


def find_markers(
    panel: ReferencePanel,
    config: Optional[
        Union[DiscoveryConfig, MethDeconvConfigModel, Dict[str, Any]]
    ] = None,
    n_jobs: int = 1,
) -> MarkerPanel:
    """
    Discover cell type-specific markers on a reference panel.

    Parameters
    ----------
    panel : ReferencePanel
        Purified-cell methylomes, already restricted to the cell types (and,
        if relevant, the target coordinates) of interest.
    config : DiscoveryConfig, MethDeconvConfigModel or dict, optional
        Discovery thresholds; defaults reproduce the reference run.
    n_jobs : int, default 1
        Number of joblib workers over contrasts.

    Returns
    -------
    MarkerPanel
        Markers, profile matrix, region values, cell labels, contrasts and
        marker states.

    Raises
    ------
    ConfigurationError
        If the options are invalid or a contrast group is too small.
    ValueError
        If the panel contains missing or non-finite values.
    InsufficientMarkersError
        If no contrast yields a marker.
    """
    if isinstance(config, MethDeconvConfigModel):
        config = config.discovery
    cfg = validate_discovery_config(config)
    if n_jobs == 0:
        raise ConfigurationError("n_jobs must be a non-zero integer")
    say = logger.info if cfg.verbose else logger.debug

    check_analysis_memory(panel.beta)
    Y = validate_beta(panel.beta)
    chrom, pos = panel.chrom, panel.pos
    cell = panel.cell

    clusters = cluster_sites(chrom, pos, max_gap=cfg.max_gap)
    contrasts = enumerate_contrasts(panel.cell_levels, pairwise=cfg.pairwise_comparison)
    logger.info(
        f"Discovery on {panel.n_sites} sites ({int(clusters.max())} clusters), "
        f"{panel.n_samples} samples, {len(contrasts)} contrasts"
    )

    # fail before any fitting if some contrast cannot be tested
    for label, row in contrasts.iterrows():
        check_group_sizes(build_contrast_design(cell, row), cfg.equal_var, label)

    kind = _marker_kind(cfg)
    if joblib is not None and n_jobs != 1:
        with joblib.Parallel(n_jobs=n_jobs) as par:
            results = par(
                joblib.delayed(find_contrast_candidates)(
                    Y, chrom, pos, clusters, cell, row, cfg, i
                )
                for i, (_, row) in enumerate(contrasts.iterrows())
            )
        for label, res in zip(contrasts.index, results):
            say(f"Found {len(res)} {label} cell type-specific {kind}")
    else:
        if not cfg.verbose:
            logger.progress("Searching contrasts", total=len(contrasts))
        results = []
        for i, (label, row) in enumerate(contrasts.iterrows()):
            if cfg.verbose:
                say(f"Searching for {label} cell type-specific {kind}")
            res = find_contrast_candidates(Y, chrom, pos, clusters, cell, row, cfg, i)
            if cfg.verbose:
                say(f"Found {len(res)} {label} cell type-specific {kind}")
            else:
                logger.progress_update(1)
            results.append(res)

    empty = [label for label, res in zip(contrasts.index, results) if res.empty]
    if empty:
        logger.warning(f"No candidates for contrast(s): {', '.join(empty)}")

    markers = assemble_markers(
        results, panel.beta, cell, panel.cell_levels, contrasts, pheno=panel.pheno
    )
    logger.info(
        f"Marker panel: {markers.n_markers} markers across "
        f"{len(panel.cell_levels)} cell types"
    )
    return markers


def _markers_from_ids(index: pd.Index) -> pd.DataFrame:
    """Coordinate table parsed from ``"{chr}:{start}-{end}"`` marker ids."""
    rows = []
    for mid in index:
        m = _MARKER_ID.match(str(mid))
        if m is None:
            raise ValueError(
                f"Cannot derive coordinates from marker id '{mid}'; pass a "
                "MarkerPanel instead of a bare profile matrix"
            )
        rows.append((m.group("chr"), int(m.group("start")), int(m.group("end"))))
    return pd.DataFrame(rows, columns=["chr", "start", "end"], index=index)


def estimate_proportions(
    panel_or_profiles: Union[MarkerPanel, pd.DataFrame],
    target: Union[pd.DataFrame, pd.Series],
    ann: Optional[pd.DataFrame] = None,
    n_jobs: int = 1,
    config: Optional[DeconvolutionConfig] = None,
) -> pd.DataFrame:
    """
    Estimate the cell-type composition of target samples.

    Parameters
    ----------
    panel_or_profiles : MarkerPanel or pd.DataFrame
        Discovery result, or a markers × cell types profile matrix.
    target : pd.DataFrame or pd.Series
        Marker-level values (markers × samples, index equal to the profile
        index) or, with ``ann``, site-level values (sites × samples).
    ann : pd.DataFrame, optional
        Site annotation (``chr``, ``pos``) of a site-level target.
    n_jobs : int, default 1
        Number of joblib workers over samples (ignored when ``config`` is given).
    config : DeconvolutionConfig, optional
        Solver settings.

    Returns
    -------
    pd.DataFrame
        Samples × cell types proportions.

    Raises
    ------
    MarkerMismatchError
        If the target is not aligned with the profile markers.
    SolverError
        If a sample cannot be solved.
    """
    if isinstance(panel_or_profiles, MarkerPanel):
        profiles = panel_or_profiles.profiles
        markers = panel_or_profiles.markers
    else:
        profiles = panel_or_profiles
        markers = None

    if config is None:
        try:
            config = DeconvolutionConfig(n_jobs=n_jobs)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid deconvolution options: {e}") from e

    if ann is not None:
        if markers is None:
            markers = _markers_from_ids(profiles.index)
        target = collapse_to_markers(target, ann, markers)

    logger.info(
        f"Estimating {profiles.shape[1]} cell-type proportions on "
        f"{profiles.shape[0]} markers"
    )
    return estimate_cell_composition(
        target,
        profiles,
        n_jobs=config.n_jobs,
        tol=config.tol,
        max_iter=config.max_iter,
    )
