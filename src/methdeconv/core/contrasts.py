#!/usr/bin/env python
# coding: utf-8


"""
Enumeration of the in-group / out-group contrasts tested during discovery.

- One-vs-rest: one contrast per cell type.
- All bipartitions: every non-trivial subset of cell types, enumerated by
  increasing bit mask (bit j set means level j is in-group), so downstream
  ranking and duplicate resolution are reproducible.
"""


from typing import List, Sequence

import numpy as np
import pandas as pd

from methdeconv.exceptions import ConfigurationError


def contrast_label(row: pd.Series) -> str:
    """In-group cell types of a contrast row joined by ``","``."""
    return ",".join(str(c) for c, v in row.items() if v)


def enumerate_contrasts(
    cell_levels: Sequence[str], pairwise: bool = False
) -> pd.DataFrame:
    """
    Build the boolean contrast matrix.

    Parameters
    ----------
    cell_levels : sequence of str
        The K cell-type labels, in level order.
    pairwise : bool, default False
        ``False`` gives the K one-vs-rest contrasts; ``True`` gives all
        2^K - 2 non-trivial bipartitions.

    Returns
    -------
    pd.DataFrame
        Boolean matrix, contrasts × cell types, indexed by contrast label.

    Raises
    ------
    ConfigurationError
        If fewer than two labels are given or labels are duplicated.
    """
    levels: List[str] = [str(c) for c in cell_levels]
    k = len(levels)
    if k < 2:
        raise ConfigurationError(
            f"at least two cell types are required to form contrasts (got {k})"
        )
    if len(set(levels)) != k:
        raise ConfigurationError(f"cell-type labels must be unique: {levels}")

    if pairwise:
        masks = np.arange(1, 2**k - 1, dtype=np.int64)
        mat = ((masks[:, None] >> np.arange(k)) & 1).astype(bool)
    else:
        mat = np.eye(k, dtype=bool)

    df = pd.DataFrame(mat, columns=levels)
    df.index = pd.Index([contrast_label(row) for _, row in df.iterrows()], name="contrast")
    return df
