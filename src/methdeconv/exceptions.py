#!/usr/bin/env python
# coding: utf-8


"""
Error taxonomy for marker discovery and cell-composition estimation.

- ``ConfigurationError``: invalid or contradictory options, raised before any \
computation starts.
- ``InsufficientMarkersError``: no candidate survived filtering in any contrast.
- ``MarkerMismatchError``: a target sample's markers do not align with the \
profile matrix.
- ``SolverError``: the constrained least-squares problem failed numerically.

All errors derive from :class:`MethDeconvError`; none are retried, since every \
input is deterministic.
"""


from typing import Optional, Sequence


class MethDeconvError(Exception):
    """Base class for all methdeconv errors."""


class ConfigurationError(MethDeconvError, ValueError):
    """Invalid or contradictory discovery/estimation options."""


class InsufficientMarkersError(MethDeconvError):
    """No marker survived the discovery thresholds across all contrasts."""


class MarkerMismatchError(MethDeconvError, ValueError):
    """
    Target values are not aligned with the profile matrix rows.

    Attributes
    ----------
    missing : list of str
        Marker ids present in the profile matrix but absent (or NaN) in the target.
    extra : list of str
        Marker ids present in the target but not in the profile matrix.
    """

    def __init__(
        self,
        message: str,
        missing: Optional[Sequence[str]] = None,
        extra: Optional[Sequence[str]] = None,
    ) -> None:
        super().__init__(message)
        self.missing = list(missing or [])
        self.extra = list(extra or [])


class SolverError(MethDeconvError, RuntimeError):
    """The mixture proportions could not be determined uniquely."""

    def __init__(self, message: str, sample: Optional[str] = None) -> None:
        if sample is not None:
            message = f"[sample {sample}] {message}"
        super().__init__(message)
        self.sample = sample
