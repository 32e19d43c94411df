#!/usr/bin/env python
# coding: utf-8


"""
Tests for methdeconv.core.downstream modules.

Covers:
- Marker assembly: contrast ordering, de-duplication, profiles, marker states,
  idempotence and the empty case.
- The simplex-constrained mixture solver: feasibility, optimality, exact
  recovery and failure modes.
- Sample-wise estimation with strict marker alignment, and collapsing of
  site-level targets onto markers.
- Helper utilities (chromosome names, group summaries, overlaps).
"""


import numpy as np
import pandas as pd
import pytest

from methdeconv.core.analysis.finder import OUTPUT_COLUMNS
from methdeconv.core.contrasts import enumerate_contrasts
from methdeconv.core.downstream.deconvolution import (
    _flat_step,
    _kkt_system,
    collapse_to_markers,
    estimate_cell_composition,
    solve_mixture,
)
from methdeconv.core.downstream.helpers import (
    _clean_chr,
    marker_ids,
    overlap_sites,
    summarize_groups,
)
from methdeconv.core.downstream.markers import MarkerPanel, assemble_markers
from methdeconv.exceptions import (
    InsufficientMarkersError,
    MarkerMismatchError,
    SolverError,
)


def _candidate(chr_, start, end, i0, i1, direction, label, contrast, dm=-0.5):
    row = dict.fromkeys(OUTPUT_COLUMNS, 0)
    row.update(
        chr=chr_,
        start=start,
        end=end,
        index_start=i0,
        index_end=i1,
        L=i1 - i0 + 1,
        cluster_L=10,
        dm=dm,
        marker_type="region" if i1 > i0 else "site",
        direction=direction,
        cell_type=label,
        contrast=contrast,
    )
    return row


def _reference():
    """Sites x samples matrix for three cell types, two samples each."""
    samples = ["A1", "A2", "B1", "B2", "C1", "C2"]
    cell = pd.Series(list("AABBCC"), index=samples)
    beta = pd.DataFrame(
        [
            [0.9, 0.8, 0.1, 0.2, 0.1, 0.1],
            [0.7, 0.9, 0.2, 0.1, 0.3, 0.1],
            [0.1, 0.1, 0.9, 0.9, 0.2, 0.2],
            [0.5, 0.5, 0.5, 0.5, 0.5, 0.5],
            [0.2, 0.2, 0.1, 0.3, 0.8, 0.9],
        ],
        index=[f"cg{i}" for i in range(5)],
        columns=samples,
    )
    return beta, cell


def _tables():
    up_a = pd.DataFrame(
        [
            _candidate("chr1", 100, 200, 0, 1, "up", "A", 0),
            _candidate("chr1", 500, 500, 4, 4, "down", "A", 0, dm=0.5),
        ]
    )
    up_b = pd.DataFrame(
        [
            _candidate("chr1", 300, 300, 2, 2, "up", "B", 1),
            # same coordinates as the first contrast's region
            _candidate("chr1", 100, 200, 0, 1, "down", "B", 1, dm=0.6),
        ]
    )
    return up_a, up_b


class TestAssembleMarkers:
    """Test marker panel assembly"""

    def test_dedup_keeps_lowest_contrast(self):
        beta, cell = _reference()
        contrasts = enumerate_contrasts(["A", "B", "C"])
        a, b = _tables()
        panel = assemble_markers([b, a], beta, cell, ["A", "B", "C"], contrasts)
        assert isinstance(panel, MarkerPanel)
        assert list(panel.markers.index) == [
            "chr1:100-200",
            "chr1:500-500",
            "chr1:300-300",
        ]
        assert panel.markers.loc["chr1:100-200", "cell_type"] == "A"
        assert not panel.markers.duplicated(["chr", "start", "end"]).any()

    def test_region_values_and_profiles(self):
        beta, cell = _reference()
        contrasts = enumerate_contrasts(["A", "B", "C"])
        panel = assemble_markers(list(_tables()), beta, cell, ["A", "B", "C"], contrasts)
        np.testing.assert_allclose(
            panel.region_values.loc["chr1:100-200"].to_numpy(),
            beta.iloc[0:2].mean(axis=0).to_numpy(),
        )
        assert list(panel.profiles.columns) == ["A", "B", "C"]
        assert panel.profiles.loc["chr1:100-200", "A"] == pytest.approx(0.825)
        assert panel.profiles.loc["chr1:300-300", "B"] == pytest.approx(0.9)
        assert panel.profiles.loc["chr1:500-500", "C"] == pytest.approx(0.85)

    def test_marker_states(self):
        beta, cell = _reference()
        contrasts = enumerate_contrasts(["A", "B", "C"])
        panel = assemble_markers(list(_tables()), beta, cell, ["A", "B", "C"], contrasts)
        states = panel.marker_states
        assert states.loc["chr1:100-200"].tolist() == [1, 0, 0]
        # down marker of contrast A: complement of its contrast row
        assert states.loc["chr1:500-500"].tolist() == [0, 1, 1]
        assert states.loc["chr1:300-300"].tolist() == [0, 1, 0]

    def test_idempotent(self):
        beta, cell = _reference()
        levels = ["A", "B", "C"]
        contrasts = enumerate_contrasts(levels)
        first = assemble_markers(list(_tables()), beta, cell, levels, contrasts)
        again = assemble_markers(first.markers, beta, cell, levels, contrasts)
        pd.testing.assert_frame_equal(first.markers, again.markers)
        pd.testing.assert_frame_equal(first.profiles, again.profiles)
        pd.testing.assert_frame_equal(first.marker_states, again.marker_states)

    def test_counts_by_contrast(self):
        beta, cell = _reference()
        levels = ["A", "B", "C"]
        panel = assemble_markers(
            list(_tables()), beta, cell, levels, enumerate_contrasts(levels)
        )
        assert panel.n_markers == 3
        assert panel.counts_by_contrast().to_dict() == {"A": 2, "B": 1}

    def test_no_candidates_raises(self):
        beta, cell = _reference()
        levels = ["A", "B", "C"]
        empty = pd.DataFrame(columns=OUTPUT_COLUMNS)
        with pytest.raises(InsufficientMarkersError, match="No candidate"):
            assemble_markers(
                [empty, empty], beta, cell, levels, enumerate_contrasts(levels)
            )


class TestSolveMixture:
    """Test the constrained least-squares solver"""

    def test_exact_recovery(self):
        rng = np.random.default_rng(7)
        P = rng.uniform(size=(30, 4))
        truth = np.array([0.5, 0.3, 0.2, 0.0])
        est = solve_mixture(P, P @ truth)
        np.testing.assert_allclose(est, truth, atol=1e-8)
        assert est[3] == 0.0

    def test_feasible_and_optimal(self):
        rng = np.random.default_rng(3)
        P = rng.uniform(size=(25, 5))
        y = rng.uniform(size=25)
        est = solve_mixture(P, y)
        assert np.all(est >= 0.0)
        assert np.all((est == 0.0) | (est > 1e-10))
        assert est.sum() == pytest.approx(1.0, abs=1e-12)

        best = np.sum((P @ est - y) ** 2)
        draws = rng.dirichlet(np.ones(5), size=2000)
        others = np.sum((draws @ P.T - y) ** 2, axis=1)
        assert best <= others.min() + 1e-12

    def test_bound_components_are_exactly_zero(self):
        est = solve_mixture(np.eye(3), np.array([2.0, -1.0, 0.0]))
        assert est[0] == pytest.approx(1.0)
        assert est[1] == 0.0
        assert est[2] == 0.0

    def test_single_cell_type(self):
        assert solve_mixture(np.ones((4, 1)), np.zeros(4)).tolist() == [1.0]

    def test_duplicated_profiles_with_unique_optimum(self):
        # one marker, two cell types sharing the same level
        est = solve_mixture(np.array([[0.8, 0.2, 0.2]]), np.array([0.8]))
        assert est.tolist() == [1.0, 0.0, 0.0]

    def test_duplicated_column_without_weight(self):
        rng = np.random.default_rng(11)
        P = rng.uniform(size=(20, 3))
        P = np.column_stack([P, P[:, 1]])
        truth = np.array([0.6, 0.0, 0.4, 0.0])
        est = solve_mixture(P, P @ truth)
        np.testing.assert_allclose(est, truth, atol=1e-8)
        assert est[1] == 0.0
        assert est[3] == 0.0

    def test_tied_profiles_raise(self):
        P = np.array([[0.2, 0.2, 0.9], [0.8, 0.8, 0.1], [0.5, 0.5, 0.3]])
        with pytest.raises(SolverError, match=r"\[sample mix1\] minimiser is not unique"):
            solve_mixture(P, np.array([0.3, 0.6, 0.4]), sample="mix1")

    def test_tied_profiles_named_in_error(self):
        P = pd.DataFrame({"A": [0.8], "B": [0.2], "C": [0.2]})
        with pytest.raises(SolverError, match=r"\['B', 'C'\]"):
            solve_mixture(P, np.array([0.2]))

    def test_flat_step_reaches_a_bound(self):
        H = 2.0 * np.ones((2, 2))
        K, _ = _kkt_system(H, np.array([0, 1]))
        step, j = _flat_step(K, np.array([0.3, 0.7]))
        assert j == 1
        np.testing.assert_allclose(step, [0.7, -0.7], atol=1e-12)

    def test_non_finite_raises(self):
        with pytest.raises(SolverError, match=r"\[sample s1\] non-finite"):
            solve_mixture(np.eye(2), np.array([np.nan, 0.5]), sample="s1")

    def test_shape_mismatch_raises(self):
        with pytest.raises(ValueError, match="incompatible shapes"):
            solve_mixture(np.eye(3), np.ones(2))

    def test_iteration_limit(self):
        with pytest.raises(SolverError, match="did not converge"):
            solve_mixture(np.eye(3), np.array([0.5, 0.5, 0.0]), max_iter=1)


def _profiles():
    return pd.DataFrame(
        {"A": [0.9, 0.1, 0.2, 0.8], "B": [0.1, 0.9, 0.2, 0.3], "C": [0.2, 0.1, 0.9, 0.4]},
        index=pd.Index(
            ["chr1:100-200", "chr1:300-300", "chr2:50-90", "chr2:400-400"],
            name="marker",
        ),
    )


class TestEstimateCellComposition:
    """Test sample-wise estimation"""

    def test_recovers_mixtures(self):
        profiles = _profiles()
        truth = pd.DataFrame(
            {"mix1": [0.6, 0.3, 0.1], "mix2": [0.0, 0.5, 0.5]}, index=["A", "B", "C"]
        )
        target = profiles @ truth
        est = estimate_cell_composition(target, profiles)
        assert list(est.index) == ["mix1", "mix2"]
        assert list(est.columns) == ["A", "B", "C"]
        np.testing.assert_allclose(est.to_numpy(), truth.T.to_numpy(), atol=1e-8)
        np.testing.assert_allclose(est.sum(axis=1), 1.0)

    def test_series_target(self):
        profiles = _profiles()
        y = profiles["B"].rename("pure_b")
        est = estimate_cell_composition(y, profiles)
        assert est.loc["pure_b", "B"] == pytest.approx(1.0)

    def test_parallel_matches_serial(self):
        profiles = _profiles()
        rng = np.random.default_rng(11)
        target = pd.DataFrame(
            rng.uniform(size=(4, 5)),
            index=profiles.index,
            columns=[f"s{i}" for i in range(5)],
        )
        serial = estimate_cell_composition(target, profiles)
        parallel = estimate_cell_composition(target, profiles, n_jobs=2)
        pd.testing.assert_frame_equal(serial, parallel)

    def test_missing_marker_raises(self):
        profiles = _profiles()
        target = profiles[["A"]].rename(columns={"A": "mix"}).iloc[:-1]
        with pytest.raises(MarkerMismatchError, match="1 missing") as exc:
            estimate_cell_composition(target, profiles)
        assert exc.value.missing == ["chr2:400-400"]
        assert exc.value.extra == []

    def test_reordered_markers_raise(self):
        profiles = _profiles()
        target = profiles[["A"]].iloc[::-1]
        with pytest.raises(MarkerMismatchError, match="ordered differently"):
            estimate_cell_composition(target, profiles)

    def test_missing_values_raise(self):
        profiles = _profiles()
        target = profiles[["A"]].copy()
        target.iloc[1, 0] = np.nan
        with pytest.raises(MarkerMismatchError, match="missing values") as exc:
            estimate_cell_composition(target, profiles)
        assert exc.value.missing == ["chr1:300-300"]


class TestCollapseToMarkers:
    """Test site-to-marker collapsing"""

    def test_means_over_overlapping_sites(self):
        markers = pd.DataFrame(
            {"chr": ["chr1", "chr1", "chr3"], "start": [100, 300, 10], "end": [200, 300, 20]}
        )
        beta = pd.DataFrame(
            {"s1": [0.2, 0.4, 0.9, 0.5], "s2": [0.0, 1.0, 0.5, 0.5]},
            index=["a", "b", "c", "d"],
        )
        ann = pd.DataFrame(
            {"chr": ["1", "chr1", "chr1", "chr2"], "pos": [100, 200, 300, 150]},
            index=["a", "b", "c", "d"],
        )
        out = collapse_to_markers(beta, ann, markers)
        assert list(out.index) == ["chr1:100-200", "chr1:300-300", "chr3:10-20"]
        np.testing.assert_allclose(out.iloc[0], [0.3, 0.5])
        np.testing.assert_allclose(out.iloc[1], [0.9, 0.5])
        assert out.iloc[2].isna().all()

    def test_missing_annotation_columns(self):
        beta = pd.DataFrame({"s1": [0.1]}, index=["a"])
        with pytest.raises(KeyError, match="lacks columns"):
            collapse_to_markers(beta, pd.DataFrame({"chr": ["chr1"]}, index=["a"]), pd.DataFrame())


class TestHelpers:
    """Test downstream helper functions"""

    def test_clean_chr(self):
        assert _clean_chr("1") == "chr1"
        assert _clean_chr("CHR2") == "chr2"
        assert _clean_chr("x") == "chrX"
        assert _clean_chr("chrY") == "chrY"
        assert _clean_chr(None) is None

    def test_marker_ids(self):
        assert marker_ids(["chr1"], [5], [9]) == ["chr1:5-9"]

    def test_summarize_groups_with_empty_level(self):
        values = pd.DataFrame([[1.0, 3.0, 5.0]], columns=["s1", "s2", "s3"])
        groups = pd.Series(["A", "A", "B"], index=["s1", "s2", "s3"])
        out = summarize_groups(values, groups, ["A", "B", "C"])
        assert out.loc[0, "A"] == 2.0
        assert out.loc[0, "B"] == 5.0
        assert np.isnan(out.loc[0, "C"])

    def test_overlap_sites_inclusive(self):
        intervals = pd.DataFrame({"chr": ["chr1"], "start": [10], "end": [20]})
        hits = overlap_sites(
            np.array(["chr1", "chr1", "chr1", "chr2"]),
            np.array([20, 5, 10, 15]),
            intervals,
        )
        assert hits[0].tolist() == [0, 2]
