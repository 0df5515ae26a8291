"""
Tests for work center normalization.
"""
import pandas as pd
import pytest

from core.calculations.work_centers import (
    WorkCenter,
    all_work_centers,
    normalize_work_center,
    normalize_work_center_series,
    parse_work_center,
)


class TestNormalizeWorkCenter:
    """Keyword rules for raw work center labels."""

    @pytest.mark.parametrize("label", [
        "Sewing", "SEWING LINE 2", "Rope Station", "embroidery", "Grommet Press",
        "Zipper", "Sewing / Assembly", "Final assembly",
    ])
    def test_assembly_family(self, label):
        assert normalize_work_center(label) == WorkCenter.ASSEMBLY

    @pytest.mark.parametrize("label", ["Cutting", "cut table", "Laser 1", "Webbing"])
    def test_cutting_family(self, label):
        assert normalize_work_center(label) == WorkCenter.CUTTING

    @pytest.mark.parametrize("label", ["Packaging", "PACK station"])
    def test_packaging_family(self, label):
        assert normalize_work_center(label) == WorkCenter.PACKAGING

    def test_assembly_keywords_win_over_cutting_and_packing(self):
        """Station words of the Assembly family take precedence."""
        assert normalize_work_center("Rope Cutting") == WorkCenter.ASSEMBLY
        assert normalize_work_center("Zipper Pack") == WorkCenter.ASSEMBLY

    @pytest.mark.parametrize("label", ["Quality Control", "Warehouse", "", "   ", None, 42])
    def test_unmatched_returns_none(self, label):
        assert normalize_work_center(label) is None

    def test_series_returns_plain_names(self):
        result = normalize_work_center_series(pd.Series(["Sewing", "Laser", "Office"]))
        assert list(result) == ["Assembly", "Cutting", None]


class TestParseWorkCenter:
    """Strict parsing of canonical names given by callers."""

    def test_case_insensitive(self):
        assert parse_work_center("assembly") == WorkCenter.ASSEMBLY
        assert parse_work_center(" Cutting ") == WorkCenter.CUTTING

    def test_enum_passthrough(self):
        assert parse_work_center(WorkCenter.PACKAGING) is WorkCenter.PACKAGING

    def test_free_text_rejected(self):
        with pytest.raises(ValueError):
            parse_work_center("Sewing")

    def test_all_work_centers(self):
        assert all_work_centers() == ["Cutting", "Assembly", "Packaging"]
