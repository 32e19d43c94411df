#!/usr/bin/env python
# coding: utf-8


"""
Reference-based cell-type deconvolution of mixed methylation samples.

Each target sample ``y`` (one value per marker) is modelled as a convex mixture
of the reference profiles ``P`` (markers × cell types):

    minimise ||P b - y||²   subject to   b >= 0,  sum(b) = 1

Features
--------
- Exact solution of the simplex-constrained least-squares problem with a \
primal active-set method started at the closest pure profile; components \
at or below the tolerance are reported as exactly zero
- Duplicated or collinear profiles are handled as long as the optimum is \
unique; ties between collinear profiles, non-finite inputs and \
non-convergence raise ``SolverError``
- Strict marker alignment between target and profiles (same ids, same \
order, no missing values); never truncates or reorders silently
- Optional per-sample parallelism via joblib
- Collapsing of site-level target data onto marker coordinates
"""


from typing import Optional, Union

import numpy as np
import pandas as pd
from scipy import linalg

from methdeconv.core.downstream.helpers import marker_ids, overlap_sites
from methdeconv.exceptions import MarkerMismatchError, SolverError
from methdeconv.utils.logger import logger

try:
    import joblib
except ImportError:
    joblib = None
    logger.warning("joblib not installed. Parallel computing unavailable.")

MAX_CONDITION = 1e12


def _kkt_system(H: np.ndarray, free: np.ndarray):
    """KKT matrix of the free set, with the Hessian block scaled to unit size."""
    nf = free.size
    block = H[np.ix_(free, free)]
    scale = np.abs(block).max()
    scale = scale if scale > 0 else 1.0
    K = np.zeros((nf + 1, nf + 1))
    K[:nf, :nf] = block / scale
    K[:nf, nf] = 1.0
    K[nf, :nf] = 1.0
    return K, scale


def _well_conditioned(K: np.ndarray) -> bool:
    cond = np.linalg.cond(K)
    return bool(np.isfinite(cond) and cond <= MAX_CONDITION)


def _kkt_step(K: np.ndarray, scale: float, g_free: np.ndarray, sample=None):
    """Equality-constrained step on the free set: returns (p_free, nu)."""
    nf = g_free.size
    rhs = np.concatenate((-g_free / scale, [0.0]))
    try:
        sol = linalg.solve(K, rhs)
    except linalg.LinAlgError as e:
        raise SolverError(f"KKT solve failed: {e}", sample=sample) from e
    return sol[:nf], sol[nf] * scale


def _flat_step(K: np.ndarray, beta_free: np.ndarray):
    """
    Move along a null direction of a singular free set until one free
    component reaches zero. The objective is constant along that direction.

    Returns (step, blocking position within the free set).
    """
    nf = beta_free.size
    _, _, vt = linalg.svd(K)
    d = vt[-1, :nf]

    best = None
    for direction in (d, -d):
        neg = direction < 0
        if not neg.any():
            continue
        ratios = -beta_free[neg] / direction[neg]
        j = int(np.argmin(ratios))
        alpha = max(ratios[j], 0.0)
        if best is None or alpha > best[0]:
            best = (alpha, direction, np.flatnonzero(neg)[j])
    alpha, direction, j = best
    return alpha * direction, j


def solve_mixture(
    profiles: Union[pd.DataFrame, np.ndarray],
    y: Union[pd.Series, np.ndarray],
    tol: float = 1e-10,
    max_iter: int = 1000,
    sample: Optional[str] = None,
) -> np.ndarray:
    """
    Mixture proportions of one sample.

    Parameters
    ----------
    profiles : pd.DataFrame or np.ndarray
        Markers × cell types reference profile matrix ``P``.
    y : pd.Series or np.ndarray
        Target value per marker, aligned with the rows of ``profiles``.
    tol : float, default 1e-10
        Tolerance on the step size and on the bound multipliers.
    max_iter : int, default 1000
        Maximum number of active-set iterations.
    sample : str, optional
        Sample name used in error messages.

    Returns
    -------
    np.ndarray
        Non-negative proportions, one per cell type, summing to 1.

    Raises
    ------
    ValueError
        If the shapes of ``profiles`` and ``y`` disagree.
    SolverError
        On non-finite input, when the minimiser is not unique (collinear
        profiles sharing the optimal weight), or when the iteration limit is
        reached.

    Notes
    -----
    The iteration starts at the vertex whose profile is closest to ``y``, so
    duplicated or collinear columns only join the free set when they lower
    the objective. Components at or below ``tol`` are returned as 0.
    """
    P = np.asarray(profiles, dtype=float)
    y = np.asarray(y, dtype=float)
    if P.ndim != 2 or y.shape != (P.shape[0],):
        raise ValueError(
            f"profiles {P.shape} and target {y.shape} have incompatible shapes"
        )
    if not (np.isfinite(P).all() and np.isfinite(y).all()):
        raise SolverError("non-finite values in profiles or target", sample=sample)

    k = P.shape[1]
    if k == 1:
        return np.ones(1)
    names = (
        [str(c) for c in profiles.columns]
        if isinstance(profiles, pd.DataFrame)
        else [str(i) for i in range(k)]
    )

    H = 2.0 * P.T @ P
    c = 2.0 * P.T @ y
    # multipliers live on the scale of the gradient
    mu_tol = tol * max(1.0, np.abs(H).max())

    start = int(np.argmin(((P - y[:, None]) ** 2).sum(axis=0)))
    beta = np.zeros(k)
    beta[start] = 1.0
    bound = np.ones(k, dtype=bool)
    bound[start] = False

    for _ in range(max_iter):
        g = H @ beta - c
        free = np.flatnonzero(~bound)
        K, scale = _kkt_system(H, free)

        if not _well_conditioned(K):
            step, j = _flat_step(K, beta[free])
            beta[free] += step
            beta[free[j]] = 0.0
            bound[free[j]] = True
            continue

        p_free, nu = _kkt_step(K, scale, g[free], sample=sample)

        if np.max(np.abs(p_free)) <= tol * max(1.0, np.max(np.abs(beta))):
            held = np.flatnonzero(bound)
            mu = g[held] + nu
            if held.size and mu.min() < -mu_tol:
                bound[held[int(np.argmin(mu))]] = False
                continue

            # a flat direction into a zero-multiplier bound means ties
            for i in held[mu <= mu_tol]:
                tied = np.append(free, i)
                if not _well_conditioned(_kkt_system(H, tied)[0]):
                    raise SolverError(
                        "minimiser is not unique; reference profiles are "
                        f"collinear on cell types {[names[t] for t in tied]}",
                        sample=sample,
                    )
            beta[bound] = 0.0
            beta[beta <= tol] = 0.0
            return beta / beta.sum()

        alpha, blocking = 1.0, None
        shrinking = p_free < 0
        if shrinking.any():
            ratios = -beta[free][shrinking] / p_free[shrinking]
            j = int(np.argmin(ratios))
            if ratios[j] < 1.0:
                alpha = max(ratios[j], 0.0)
                blocking = free[shrinking][j]

        beta[free] += alpha * p_free
        if blocking is not None:
            beta[blocking] = 0.0
            bound[blocking] = True

    raise SolverError(
        f"active-set method did not converge in {max_iter} iterations", sample=sample
    )


def _check_alignment(target: pd.DataFrame, profiles: pd.DataFrame) -> None:
    if not target.index.equals(profiles.index):
        in_target = set(target.index)
        in_profiles = set(profiles.index)
        missing = [m for m in profiles.index if m not in in_target]
        extra = [m for m in target.index if m not in in_profiles]
        if missing or extra:
            raise MarkerMismatchError(
                f"Target markers do not match the profile matrix: "
                f"{len(missing)} missing, {len(extra)} extra",
                missing=missing,
                extra=extra,
            )
        raise MarkerMismatchError(
            "Target markers are ordered differently from the profile matrix; "
            "reindex the target with profiles.index"
        )

    nan_rows = target.index[target.isna().any(axis=1)]
    if len(nan_rows):
        raise MarkerMismatchError(
            f"Target has missing values at {len(nan_rows)} markers",
            missing=list(nan_rows),
        )


def estimate_cell_composition(
    target: Union[pd.DataFrame, pd.Series],
    profiles: pd.DataFrame,
    n_jobs: int = 1,
    tol: float = 1e-10,
    max_iter: int = 1000,
) -> pd.DataFrame:
    """
    Estimate cell-type proportions of every target sample.

    Parameters
    ----------
    target : pd.DataFrame or pd.Series
        Markers × samples values (a Series is one sample). The index must
        equal ``profiles.index``: same markers, same order.
    profiles : pd.DataFrame
        Markers × cell types reference profile matrix.
    n_jobs : int, default 1
        Number of joblib workers; samples are solved independently.
    tol, max_iter
        Passed to :func:`solve_mixture`.

    Returns
    -------
    pd.DataFrame
        Samples × cell types, rows non-negative and summing to 1.

    Raises
    ------
    MarkerMismatchError
        If the target markers differ from the profile markers (ids or order)
        or contain missing values.
    SolverError
        If a sample cannot be solved.
    """
    if isinstance(target, pd.Series):
        target = target.to_frame(name=target.name if target.name is not None else "sample")
    if profiles is None or profiles.empty:
        raise ValueError("profiles is empty")

    _check_alignment(target, profiles)

    P = profiles.to_numpy(dtype=float)
    Y = target.to_numpy(dtype=float)
    samples = [str(s) for s in target.columns]

    if joblib is not None and n_jobs != 1:
        with joblib.Parallel(n_jobs=n_jobs) as par:
            rows = par(
                joblib.delayed(solve_mixture)(P, Y[:, i], tol, max_iter, samples[i])
                for i in range(Y.shape[1])
            )
    else:
        rows = [
            solve_mixture(P, Y[:, i], tol=tol, max_iter=max_iter, sample=samples[i])
            for i in range(Y.shape[1])
        ]

    props = np.vstack(rows) if rows else np.empty((0, P.shape[1]))
    return pd.DataFrame(props, index=target.columns, columns=profiles.columns)


def collapse_to_markers(
    beta: pd.DataFrame,
    ann: pd.DataFrame,
    markers: pd.DataFrame,
    chr_col: str = "chr",
    pos_col: str = "pos",
) -> pd.DataFrame:
    """
    Average site-level target values over each marker's coordinates.

    Parameters
    ----------
    beta : pd.DataFrame
        Target sites × samples.
    ann : pd.DataFrame
        Site annotation indexed like ``beta`` with chromosome and position.
    markers : pd.DataFrame
        Marker table with ``chr``, ``start`` and ``end`` columns.

    Returns
    -------
    pd.DataFrame
        Markers × samples, indexed by marker id in marker order. Markers
        without any covered site are all-NaN rows.
    """
    missing = {chr_col, pos_col} - set(ann.columns)
    if missing:
        raise KeyError(f"Target annotation lacks columns: {sorted(missing)}")
    ann = ann.reindex(beta.index)
    if ann[[chr_col, pos_col]].isna().any().any():
        raise KeyError("Target annotation does not cover every site of beta")

    hits = overlap_sites(ann[chr_col].to_numpy(), ann[pos_col].to_numpy(), markers)
    ids = marker_ids(markers["chr"], markers["start"], markers["end"])

    values = np.full((len(ids), beta.shape[1]), np.nan)
    for i, idx in enumerate(hits):
        if idx.size:
            values[i] = beta.iloc[idx].mean(axis=0).to_numpy(dtype=float)

    n_empty = sum(1 for idx in hits if idx.size == 0)
    if n_empty:
        logger.warning(f"{n_empty} of {len(ids)} markers have no covered site in the target")
    return pd.DataFrame(values, index=pd.Index(ids, name="marker"), columns=beta.columns)
