#!/usr/bin/env python
# coding: utf-8


"""
Tests for methdeconv.io readers and the reference panel container.

This suite covers:
- Index normalisation and alignment checks.
- ReferencePanel construction: chromosome cleaning, coordinate sorting,
  duplicate coordinates, cell-type levels.
- Panel operations: cell-type subsetting, outlier removal, restriction to
  target coordinates.
- File format handling (CSV, TSV, Feather, Parquet) and error paths.
"""


import logging

import numpy as np
import pandas as pd
import pytest

from methdeconv.io.data_utils import (
    ReferencePanel,
    _chr_rank,
    _ensure_index_alignment,
    _ensure_index_strings,
)
from methdeconv.io.readers import _read, load_reference_panel, load_target_data


def _tables():
    samples = ["S1", "S2", "S3", "S4", "S5", "S6"]
    sites = ["cg1", "cg2", "cg3", "cg4", "cg5"]
    beta = pd.DataFrame(
        np.linspace(0.05, 0.95, 30).reshape(5, 6), index=sites, columns=samples
    )
    pheno = pd.DataFrame(
        {
            "CellType": ["CD8T", "Gran", "CD8T", "Gran", "NK", "NK"],
            "Sample_Name": ["CD8+_105", "Gran_1", "CD8+_106", "Gran_2", "NK_1", "NK_2"],
        },
        index=samples,
    )
    ann = pd.DataFrame(
        {"chr": ["2", "chr1", "X", "1", "chr10"], "pos": [50, 900, 10, 100, 5]},
        index=sites,
    )
    return beta, pheno, ann


class TestDataUtils:
    """Test data utility functions"""

    def test_ensure_index_strings(self):
        df = pd.DataFrame({"a": [1, 2]}, index=[0, 1])
        result = _ensure_index_strings(df)
        assert result.index.tolist() == ["0", "1"]
        assert df.index.tolist() == [0, 1]

    def test_ensure_index_alignment_missing_samples(self):
        beta, pheno, ann = _tables()
        with pytest.raises(KeyError, match="Samples in beta but not in pheno"):
            _ensure_index_alignment(beta, pheno.iloc[:3], ann)

    def test_ensure_index_alignment_missing_sites(self):
        beta, pheno, ann = _tables()
        with pytest.raises(KeyError, match="Sites in beta but not in ann"):
            _ensure_index_alignment(beta, pheno, ann.iloc[:2])

    def test_ensure_index_alignment_missing_columns(self):
        beta, pheno, ann = _tables()
        with pytest.raises(KeyError, match="lacks columns"):
            _ensure_index_alignment(beta, pheno, ann[["chr"]])

    def test_chr_rank_natural_order(self):
        names = ["chrX", "chr10", "chr2", "chrM", "chr1", "chrY", "chrUn"]
        assert sorted(names, key=_chr_rank) == [
            "chr1",
            "chr2",
            "chr10",
            "chrX",
            "chrY",
            "chrM",
            "chrUn",
        ]


class TestReferencePanel:
    """Test the reference panel container"""

    def test_sites_sorted_and_cleaned(self):
        beta, pheno, ann = _tables()
        panel = ReferencePanel(beta=beta, pheno=pheno, ann=ann)
        assert panel.chrom.tolist() == ["chr1", "chr1", "chr2", "chr10", "chrX"]
        assert panel.pos.tolist() == [100, 900, 50, 5, 10]
        assert list(panel.beta.index) == ["cg4", "cg2", "cg1", "cg5", "cg3"]
        assert panel.beta.loc["cg1", "S1"] == beta.loc["cg1", "S1"]
        assert panel.n_sites == 5
        assert panel.n_samples == 6

    def test_cell_levels_default_first_appearance(self):
        beta, pheno, ann = _tables()
        panel = ReferencePanel(beta=beta, pheno=pheno, ann=ann)
        assert panel.cell_levels == ["CD8T", "Gran", "NK"]
        assert list(panel.cell.cat.categories) == ["CD8T", "Gran", "NK"]
        assert panel.cell.index.tolist() == list(beta.columns)

    def test_unknown_level_rejected(self):
        beta, pheno, ann = _tables()
        with pytest.raises(ValueError, match="outside cell_levels"):
            ReferencePanel(beta=beta, pheno=pheno, ann=ann, cell_levels=["Gran", "NK"])

    def test_missing_cell_type_column(self):
        beta, pheno, ann = _tables()
        with pytest.raises(KeyError, match="cell-type column"):
            ReferencePanel(beta=beta, pheno=pheno, ann=ann, cell_type_col="Type")

    def test_duplicated_coordinates_rejected(self):
        beta, pheno, ann = _tables()
        ann.loc["cg5", ["chr", "pos"]] = ["chr1", 100]
        with pytest.raises(ValueError, match="duplicated"):
            ReferencePanel(beta=beta, pheno=pheno, ann=ann)

    def test_subset_cell_types(self):
        beta, pheno, ann = _tables()
        panel = ReferencePanel(beta=beta, pheno=pheno, ann=ann)
        sub = panel.subset_cell_types(["NK", "Gran"])
        assert sub.cell_levels == ["NK", "Gran"]
        assert sub.n_samples == 4
        assert set(sub.pheno["CellType"]) == {"NK", "Gran"}
        # the original panel is untouched
        assert panel.n_samples == 6

    def test_subset_unknown_cell_type(self):
        beta, pheno, ann = _tables()
        panel = ReferencePanel(beta=beta, pheno=pheno, ann=ann)
        with pytest.raises(KeyError, match="not present"):
            panel.subset_cell_types(["Mono"])

    def test_drop_samples_by_name(self, caplog):
        beta, pheno, ann = _tables()
        panel = ReferencePanel(
            beta=beta, pheno=pheno, ann=ann, sample_name_col="Sample_Name"
        )
        caplog.set_level(logging.WARNING, logger="methdeconv")
        out = panel.drop_samples(["CD8+_105", "ghost"])
        assert "S1" not in out.beta.columns
        assert out.n_samples == 5
        assert out.meta["dropped_samples"] == ["S1"]
        assert "ghost" in caplog.text

    def test_drop_all_samples_of_a_type(self):
        beta, pheno, ann = _tables()
        panel = ReferencePanel(beta=beta, pheno=pheno, ann=ann)
        out = panel.drop_samples(["S5", "S6"])
        assert out.cell_levels == ["CD8T", "Gran"]

    def test_restrict_to(self, caplog):
        beta, pheno, ann = _tables()
        panel = ReferencePanel(beta=beta, pheno=pheno, ann=ann)
        target = pd.DataFrame({"chr": ["1", "chrX", "chr3"], "pos": [100, 10, 7]})
        caplog.set_level(logging.INFO, logger="methdeconv")
        out = panel.restrict_to(target)
        assert list(out.beta.index) == ["cg4", "cg3"]
        assert out.meta["n_overlapping_sites"] == 2
        assert "Using 2 overlapping sites" in caplog.text

    def test_restrict_to_requires_columns(self):
        beta, pheno, ann = _tables()
        panel = ReferencePanel(beta=beta, pheno=pheno, ann=ann)
        with pytest.raises(KeyError, match="must provide"):
            panel.restrict_to(pd.DataFrame({"chrom": ["chr1"], "pos": [1]}))


class TestReaders:
    """Test file readers"""

    def test_read_unsupported_format(self, tmp_path):
        path = tmp_path / "data.xyz"
        path.write_text("x")
        with pytest.raises(ValueError, match="Unsupported format"):
            _read(path, index_col=0)

    def test_read_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            _read(tmp_path / "missing.csv", index_col=0)

    def test_read_tsv(self, tmp_path):
        path = tmp_path / "beta.tsv"
        pd.DataFrame({"S1": [0.1, 0.2]}, index=["cg1", "cg2"]).to_csv(path, sep="\t")
        df = _read(path, index_col=0)
        assert df.loc["cg2", "S1"] == pytest.approx(0.2)

    def test_read_feather_index_out_of_bounds(self, tmp_path):
        pytest.importorskip("pyarrow")
        path = tmp_path / "beta.feather"
        pd.DataFrame({"S1": [0.1]}).to_feather(path)
        with pytest.raises(IndexError):
            _read(path, index_col=5)

    def test_read_parquet(self, tmp_path):
        pytest.importorskip("pyarrow")
        path = tmp_path / "beta.parquet"
        pd.DataFrame({"S1": [0.1, 0.3]}, index=["cg1", "cg2"]).to_parquet(path)
        df = _read(path, index_col=0)
        assert df.loc["cg2", "S1"] == pytest.approx(0.3)

    def test_load_reference_panel_from_csv(self, tmp_path):
        beta, pheno, ann = _tables()
        beta.to_csv(tmp_path / "beta.csv")
        pheno.to_csv(tmp_path / "pheno.csv")
        ann.to_csv(tmp_path / "ann.csv")
        panel = load_reference_panel(
            tmp_path / "beta.csv",
            tmp_path / "pheno.csv",
            tmp_path / "ann.csv",
            sample_name_col="Sample_Name",
            cell_levels=["Gran", "CD8T", "NK"],
        )
        assert panel.cell_levels == ["Gran", "CD8T", "NK"]
        assert panel.chrom[0] == "chr1"

    def test_load_reference_panel_coerces_text(self, caplog):
        beta, pheno, ann = _tables()
        beta = beta.astype(object)
        beta.iloc[0, 0] = "bad"
        caplog.set_level(logging.WARNING, logger="methdeconv")
        panel = load_reference_panel(beta, pheno, ann)
        assert np.isnan(panel.beta.loc["cg1", "S1"])
        assert "Coerced 1 values to NaN" in caplog.text

    def test_load_target_data(self, tmp_path):
        target = pd.DataFrame({"mix": [0.4, 0.6]}, index=["t1", "t2"])
        ann = pd.DataFrame(
            {"chr": ["chr1", "chr1", "chr2"], "pos": [1, 2, 3]}, index=["t2", "t1", "t3"]
        )
        beta, ann_out = load_target_data(target, ann)
        assert list(ann_out.index) == ["t1", "t2"]
        assert ann_out.loc["t1", "pos"] == 2

        only, none = load_target_data(target)
        assert none is None
        assert only.shape == (2, 1)

    def test_load_target_data_missing_annotation(self):
        target = pd.DataFrame({"mix": [0.4]}, index=["t1"])
        with pytest.raises(KeyError, match="not in ann"):
            load_target_data(target, pd.DataFrame({"chr": [], "pos": []}))

    def test_invalid_input_type(self):
        with pytest.raises(TypeError, match="path or a pandas DataFrame"):
            load_target_data([1, 2, 3])
