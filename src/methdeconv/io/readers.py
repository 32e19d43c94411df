#!/usr/bin/env python
# coding: utf-8


"""
Input utilities for reference panels and target samples.

Normalised methylation matrices are produced by an external preprocessing step;
this module only reads them into the containers used by discovery and
estimation.

Features
--------
- Multi-format reading (CSV, TSV, Excel, Parquet, Feather, HDF5)
- Coercion of the methylation matrix to numeric values with a warning on loss
- ``load_reference_panel()``: matrix + sample metadata + site annotation → \
:class:`ReferencePanel`
- ``load_target_data()``: mixed-sample matrix (+ optional annotation) for \
``estimate_proportions``
"""


from pathlib import Path
from typing import Optional, Sequence, Tuple, Union

import pandas as pd

from methdeconv.io.data_utils import ReferencePanel
from methdeconv.utils.logger import logger

TableInput = Union[str, Path, pd.DataFrame]


def _read(path: Union[str, Path], index_col: Optional[int]) -> pd.DataFrame:
    """
    Read a table from one of the supported formats.

    Supported formats
    -----------------
    .csv, .tsv/.txt, .xlsx/.xls, .parquet, .feather, .h5/.hdf5

    HDF5 files must hold exactly one dataset (or a ``/beta`` dataset).

    Raises
    ------
    FileNotFoundError
        If the file does not exist.
    ValueError
        If the format is unsupported or the HDF5 store is ambiguous.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")
    suf = path.suffix.lower()

    if suf == ".csv":
        return pd.read_csv(path, index_col=index_col)
    elif suf in (".tsv", ".txt"):
        return pd.read_csv(path, sep="\t", index_col=index_col)
    elif suf in (".xlsx", ".xls"):
        return pd.read_excel(path, index_col=index_col)
    elif suf == ".parquet":
        return pd.read_parquet(path)
    elif suf == ".feather":
        df = pd.read_feather(path)
        if index_col is not None:
            if index_col < 0 or index_col >= len(df.columns):
                raise IndexError("index_col out of bounds for feather file")
            df = df.set_index(df.columns[index_col])
        return df
    elif suf in (".h5", ".hdf5"):
        with pd.HDFStore(path, "r") as store:
            keys = list(store.keys())
            if "/beta" in keys:
                return store["/beta"]
            if len(keys) == 1:
                return store[keys[0]]
            raise ValueError(
                f"HDF5 file contains multiple keys: {keys}. Provide a file with "
                "a single dataset or a '/beta' dataset."
            )
    else:
        raise ValueError(f"Unsupported format: {suf}")


def _as_frame(data: TableInput, index_col: Optional[int]) -> pd.DataFrame:
    if isinstance(data, (str, Path)):
        return _read(Path(data), index_col=index_col)
    if isinstance(data, pd.DataFrame):
        return data.copy()
    raise TypeError("expected a path or a pandas DataFrame")


def _coerce_numeric(beta: pd.DataFrame, what: str) -> pd.DataFrame:
    orig_na = int(beta.isna().sum().sum())
    beta = beta.apply(pd.to_numeric, errors="coerce")
    coerced = int(beta.isna().sum().sum()) - orig_na
    if coerced > 0:
        logger.warning(f"Coerced {coerced} values to NaN while parsing {what}.")
    return beta


def load_reference_panel(
    beta_input: TableInput,
    pheno_input: TableInput,
    ann_input: TableInput,
    cell_type_col: str = "CellType",
    sample_name_col: Optional[str] = None,
    cell_levels: Optional[Sequence[str]] = None,
    index_col_site: Optional[int] = 0,
    index_col_sample: Optional[int] = 0,
) -> ReferencePanel:
    """
    Build a :class:`ReferencePanel` from files and/or DataFrames.

    Parameters
    ----------
    beta_input : str | Path | pd.DataFrame
        Sites × samples methylation matrix (values in [0, 1]).
    pheno_input : str | Path | pd.DataFrame
        Sample metadata indexed by sample id, with a cell-type column.
    ann_input : str | Path | pd.DataFrame
        Site annotation indexed by site id with ``chr`` and ``pos`` columns.
    cell_type_col : str, default "CellType"
        Cell-type column of the metadata.
    sample_name_col : str, optional
        Display-name column used for outlier exclusion.
    cell_levels : sequence of str, optional
        Cell-type order; defaults to order of first appearance.
    index_col_site, index_col_sample : int, default 0
        Index columns when reading the matrix/annotation and the metadata.

    Returns
    -------
    ReferencePanel
        Validated, coordinate-sorted panel.
    """
    beta = _coerce_numeric(_as_frame(beta_input, index_col_site), "reference beta")
    pheno = _as_frame(pheno_input, index_col_sample)
    ann = _as_frame(ann_input, index_col_site)

    panel = ReferencePanel(
        beta=beta,
        pheno=pheno,
        ann=ann,
        cell_type_col=cell_type_col,
        sample_name_col=sample_name_col,
        cell_levels=list(cell_levels) if cell_levels is not None else None,
    )
    logger.info(
        f"Loaded reference panel: {panel.n_samples} samples, {panel.n_sites} sites, "
        f"{len(panel.cell_levels)} cell types."
    )
    return panel


def load_target_data(
    beta_input: TableInput,
    ann_input: Optional[TableInput] = None,
    index_col_site: Optional[int] = 0,
) -> Tuple[pd.DataFrame, Optional[pd.DataFrame]]:
    """
    Read the methylation matrix of the mixed samples (and its annotation).

    Returns
    -------
    (pd.DataFrame, pd.DataFrame or None)
        String-indexed matrix and, when given, the annotation restricted to
        the matrix rows.

    Raises
    ------
    KeyError
        If the annotation does not cover every matrix row.
    """
    beta = _coerce_numeric(_as_frame(beta_input, index_col_site), "target beta")
    beta.index = beta.index.astype(str)
    beta.columns = beta.columns.astype(str)

    if ann_input is None:
        return beta, None

    ann = _as_frame(ann_input, index_col_site)
    ann.index = ann.index.astype(str)
    missing = set(beta.index) - set(ann.index)
    if missing:
        raise KeyError(f"Sites in target but not in ann: {sorted(missing)[:5]}...")
    logger.info(f"Loaded target data: {beta.shape[1]} samples, {beta.shape[0]} sites.")
    return beta, ann.loc[beta.index]
