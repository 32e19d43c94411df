#!/usr/bin/env python
# coding: utf-8


"""
Reference-panel container and panel operations for marker discovery.

Key Components
--------------
ReferencePanel

- Holds the purified-cell methylation matrix (sites × samples), sample metadata
  with a cell-type column, and the site annotation (``chr``, ``pos``).
- On construction every index is string-normalised, the three tables are
  aligned, chromosome names are cleaned and sites are sorted by
  (chromosome, position). That order is the site index used by clustering,
  segmentation and marker assembly.
- ``subset_cell_types``, ``drop_samples`` and ``restrict_to`` return new panels;
  a panel is never modified in place.

Validation helpers:

- ``_ensure_index_alignment(beta, pheno, ann)``
- ``_ensure_index_strings(df)``
"""

import re
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Optional, Sequence

import numpy as np
import pandas as pd

from methdeconv.core.downstream.helpers import _clean_chr
from methdeconv.utils.logger import logger

_CHR_ORDER = {f"chr{i}": i for i in range(1, 23)}
_CHR_ORDER.update({"chrX": 23, "chrY": 24, "chrM": 25})


def _chr_rank(ch: str) -> tuple:
    """Natural sort key: chr1..chr22, chrX, chrY, chrM, then others by name."""
    if ch in _CHR_ORDER:
        return (_CHR_ORDER[ch], "")
    m = re.match(r"chr(\d+)$", ch)
    if m:
        return (int(m.group(1)), "")
    return (100, ch)


def _ensure_index_alignment(
    beta: pd.DataFrame, pheno: pd.DataFrame, ann: pd.DataFrame
) -> None:
    """
    Validate that samples and sites are consistently indexed across the \
    methylation matrix, the sample metadata and the site annotation.

    Raises
    ------
    KeyError
        If samples in ``beta`` are missing from ``pheno``, sites in ``beta`` are
        missing from ``ann``, or ``ann`` lacks the ``chr`` / ``pos`` columns.
    """
    missing_samples = set(beta.columns) - set(pheno.index)
    if missing_samples:
        raise KeyError(
            f"Samples in beta but not in pheno: {sorted(missing_samples)[:5]}..."
        )

    missing_cols = {"chr", "pos"} - set(ann.columns)
    if missing_cols:
        raise KeyError(f"Site annotation lacks columns: {sorted(missing_cols)}")

    missing_sites = set(beta.index) - set(ann.index)
    if missing_sites:
        raise KeyError(
            f"Sites in beta but not in ann: {sorted(missing_sites)[:5]}..."
        )


def _ensure_index_strings(df: pd.DataFrame) -> pd.DataFrame:
    """Return a copy of ``df`` with a string index (columns untouched)."""
    if df is None:
        return df
    df = df.copy()
    df.index = df.index.astype(str)
    return df


@dataclass
class ReferencePanel:
    """
    Purified-cell reference methylomes aligned to an ordered coordinate set.

    Parameters
    ----------
    beta : pd.DataFrame
        Methylation levels in [0, 1], sites as rows and samples as columns.
    pheno : pd.DataFrame
        Sample metadata indexed by sample id; must contain ``cell_type_col``.
    ann : pd.DataFrame
        Site annotation indexed by site id with ``chr`` and ``pos`` columns.
    cell_type_col : str, default "CellType"
        Column of ``pheno`` holding the cell-type label.
    sample_name_col : str, optional
        Column of ``pheno`` holding display names used by ``drop_samples``
        (e.g. ``"Sample_Name"``). Sample ids are always accepted as well.
    cell_levels : list of str, optional
        Cell-type order. Defaults to order of first appearance.
    meta : dict, optional
        Free-form provenance (normalisation, subsetting, overlap counts).
    """

    beta: pd.DataFrame
    pheno: pd.DataFrame
    ann: pd.DataFrame
    cell_type_col: str = "CellType"
    sample_name_col: Optional[str] = None
    cell_levels: Optional[List[str]] = None
    meta: Dict[str, Any] = field(
        default_factory=lambda: {"matrix_type": "beta", "normalized": False}
    )

    def __post_init__(self) -> None:
        beta = _ensure_index_strings(self.beta)
        beta.columns = beta.columns.astype(str)
        pheno = _ensure_index_strings(self.pheno)
        ann = _ensure_index_strings(self.ann)
        _ensure_index_alignment(beta, pheno, ann)

        if self.cell_type_col not in pheno.columns:
            raise KeyError(f"pheno lacks the cell-type column '{self.cell_type_col}'")
        if self.sample_name_col is not None and (
            self.sample_name_col not in pheno.columns
        ):
            raise KeyError(f"pheno lacks the sample-name column '{self.sample_name_col}'")

        pheno = pheno.loc[beta.columns]
        ann = ann.loc[beta.index, ["chr", "pos"]].copy()
        ann["chr"] = ann["chr"].map(_clean_chr)
        ann["pos"] = ann["pos"].astype(np.int64)

        if ann.duplicated(["chr", "pos"]).any():
            raise ValueError("Site annotation contains duplicated (chr, pos) pairs")

        chr_levels = sorted(pd.unique(ann["chr"]), key=_chr_rank)
        chr_code = ann["chr"].map({c: i for i, c in enumerate(chr_levels)})
        order = np.lexsort((ann["pos"].to_numpy(), chr_code.to_numpy()))
        self.ann = ann.iloc[order]
        self.beta = beta.iloc[order].astype(float)
        self.pheno = pheno

        labels = pheno[self.cell_type_col].astype(str)
        if self.cell_levels is None:
            self.cell_levels = list(pd.unique(labels))
        else:
            self.cell_levels = [str(c) for c in self.cell_levels]
            if len(set(self.cell_levels)) != len(self.cell_levels):
                raise ValueError("cell_levels contains duplicated labels")
            unknown = set(labels) - set(self.cell_levels)
            if unknown:
                raise ValueError(
                    f"Samples carry cell types outside cell_levels: {sorted(unknown)}"
                )

    # Accessors
    @property
    def chrom(self) -> np.ndarray:
        return self.ann["chr"].to_numpy()

    @property
    def pos(self) -> np.ndarray:
        return self.ann["pos"].to_numpy()

    @property
    def cell(self) -> pd.Series:
        """Categorical cell-type label per sample, ordered by ``cell_levels``."""
        return pd.Series(
            pd.Categorical(
                self.pheno[self.cell_type_col].astype(str),
                categories=self.cell_levels,
            ),
            index=self.beta.columns,
            name=self.cell_type_col,
        )

    @property
    def n_sites(self) -> int:
        return self.beta.shape[0]

    @property
    def n_samples(self) -> int:
        return self.beta.shape[1]

    # Panel operations (each returns a new panel)
    def subset_cell_types(self, labels: Sequence[str]) -> "ReferencePanel":
        """
        Keep the samples of the named cell types, with ``labels`` as level order.

        Raises
        ------
        KeyError
            If a label has no sample in the panel.
        """
        labels = [str(lab) for lab in labels]
        present = set(self.pheno[self.cell_type_col].astype(str))
        unknown = [lab for lab in labels if lab not in present]
        if unknown:
            raise KeyError(f"Cell types not present in the panel: {unknown}")

        keep = self.pheno[self.cell_type_col].astype(str).isin(labels).to_numpy()
        meta = dict(self.meta, cell_types=labels)
        return replace(
            self,
            beta=self.beta.loc[:, keep],
            pheno=self.pheno.loc[keep],
            ann=self.ann,
            cell_levels=labels,
            meta=meta,
        )

    def drop_samples(self, names: Iterable[str]) -> "ReferencePanel":
        """
        Exclude samples by id or, when configured, by ``sample_name_col``.

        Unknown names are reported with a warning and otherwise ignored.
        """
        names = {str(n) for n in names}
        ids = pd.Series(self.pheno.index, index=self.pheno.index)
        hit = ids.isin(names)
        if self.sample_name_col is not None:
            hit |= self.pheno[self.sample_name_col].astype(str).isin(names)

        matched = set(ids[hit])
        if self.sample_name_col is not None:
            matched |= set(self.pheno.loc[hit, self.sample_name_col].astype(str))
        unknown = names - matched
        if unknown:
            logger.warning(f"drop_samples: no sample matches {sorted(unknown)}")

        keep = ~hit.to_numpy()
        meta = dict(self.meta)
        meta["dropped_samples"] = sorted(ids[hit]) + meta.get("dropped_samples", [])
        return replace(
            self,
            beta=self.beta.loc[:, keep],
            pheno=self.pheno.loc[keep],
            ann=self.ann,
            cell_levels=[
                c
                for c in self.cell_levels
                if c in set(self.pheno.loc[keep, self.cell_type_col].astype(str))
            ],
            meta=meta,
        )

    def restrict_to(
        self, target: pd.DataFrame, chr_col: str = "chr", pos_col: str = "pos"
    ) -> "ReferencePanel":
        """
        Keep the sites whose (chromosome, position) occur in a target coordinate table.

        Parameters
        ----------
        target : pd.DataFrame
            Target site coordinates (e.g. the annotation of the mixed samples).

        Returns
        -------
        ReferencePanel
            Panel restricted to the overlapping sites, in panel order.
        """
        if chr_col not in target.columns or pos_col not in target.columns:
            raise KeyError(f"target must provide '{chr_col}' and '{pos_col}' columns")

        wanted = set(
            zip(
                (_clean_chr(c) for c in target[chr_col]),
                target[pos_col].astype(np.int64),
            )
        )
        keep = np.fromiter(
            ((c, p) in wanted for c, p in zip(self.chrom, self.pos)),
            dtype=bool,
            count=self.n_sites,
        )
        logger.info(
            f"Target coordinates supplied. Using {int(keep.sum())} overlapping sites."
        )
        meta = dict(self.meta, n_overlapping_sites=int(keep.sum()))
        return replace(
            self,
            beta=self.beta.loc[keep],
            pheno=self.pheno,
            ann=self.ann.loc[keep],
            meta=meta,
        )
