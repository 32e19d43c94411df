#!/usr/bin/env python
# coding: utf-8


"""
Assembly of the final marker panel from per-contrast candidate tables.

Key Components
--------------
MarkerPanel

- ``markers``: de-duplicated candidate rows indexed by ``"{chr}:{start}-{end}"``
- ``region_values``: markers × reference samples, mean methylation over each
  marker's sites
- ``profiles``: markers × cell types, per-cell-type mean of ``region_values``
- ``marker_states``: markers × cell types 0/1 expected-methylation pattern
- ``cell``, ``contrasts``, ``cell_levels``, ``pheno``: the discovery context

assemble_markers

- Concatenates candidates in contrast order, drops coordinate duplicates
  (first occurrence wins) and derives the matrices above.
"""


from dataclasses import dataclass
from typing import List, Optional, Sequence, Union

import numpy as np
import pandas as pd

from methdeconv.core.analysis.postprocessing import (
    COORDINATES,
    concat_candidates,
    region_means,
)
from methdeconv.core.downstream.helpers import marker_ids, summarize_groups
from methdeconv.exceptions import InsufficientMarkersError


@dataclass
class MarkerPanel:
    """Discovered markers together with the reference profiles used for estimation."""

    markers: pd.DataFrame
    profiles: pd.DataFrame
    region_values: pd.DataFrame
    cell: pd.Series
    contrasts: pd.DataFrame
    marker_states: pd.DataFrame
    cell_levels: List[str]
    pheno: Optional[pd.DataFrame] = None

    @property
    def n_markers(self) -> int:
        return self.markers.shape[0]

    def counts_by_contrast(self) -> pd.Series:
        """Number of markers contributed by each contrast label."""
        return self.markers.groupby("cell_type", sort=False).size()


def _marker_states(markers: pd.DataFrame, contrasts: pd.DataFrame) -> pd.DataFrame:
    rows = contrasts.to_numpy(dtype=np.int64)[markers["contrast"].to_numpy(dtype=np.int64)]
    down = (markers["direction"] == "down").to_numpy()
    rows[down] = 1 - rows[down]
    return pd.DataFrame(rows, index=markers.index, columns=list(contrasts.columns))


def assemble_markers(
    candidates: Union[pd.DataFrame, Sequence[pd.DataFrame]],
    beta: pd.DataFrame,
    cell: pd.Series,
    cell_levels: Sequence[str],
    contrasts: pd.DataFrame,
    pheno: Optional[pd.DataFrame] = None,
) -> MarkerPanel:
    """
    Build the marker panel.

    Parameters
    ----------
    candidates : pd.DataFrame or sequence of pd.DataFrame
        Candidate tables from :func:`find_contrast_candidates`, or an
        already-assembled marker table.
    beta : pd.DataFrame
        Reference sites × samples, in the site order the candidates' indices
        refer to.
    cell : pd.Series
        Cell-type label per sample.
    cell_levels : sequence of str
        Cell-type order of the profile columns.
    contrasts : pd.DataFrame
        Contrast matrix the candidates' ``contrast`` column indexes into.
    pheno : pd.DataFrame, optional
        Sample metadata carried along.

    Returns
    -------
    MarkerPanel

    Raises
    ------
    InsufficientMarkersError
        If no candidate is left.
    """
    if isinstance(candidates, pd.DataFrame):
        table = candidates.reset_index(drop=True)
    else:
        table = concat_candidates(list(candidates), extra=["cell_type", "contrast"])

    if table.empty:
        raise InsufficientMarkersError(
            "No candidate region or site passed the discovery thresholds in any "
            "contrast; relax the p-value or deviation cutoffs"
        )

    # contrast order first, original order within a contrast
    table = table.sort_values("contrast", kind="mergesort")
    table = table.drop_duplicates(subset=COORDINATES, keep="first")
    table.index = pd.Index(
        marker_ids(table["chr"], table["start"], table["end"]), name="marker"
    )

    values = region_means(
        beta.to_numpy(dtype=float),
        table["index_start"].to_numpy(dtype=np.int64),
        table["index_end"].to_numpy(dtype=np.int64),
    )
    region_values = pd.DataFrame(values, index=table.index, columns=beta.columns)

    levels = [str(c) for c in cell_levels]
    profiles = summarize_groups(region_values, cell, levels)

    return MarkerPanel(
        markers=table,
        profiles=profiles,
        region_values=region_values,
        cell=cell,
        contrasts=contrasts,
        marker_states=_marker_states(table, contrasts),
        cell_levels=levels,
        pheno=pheno,
    )
