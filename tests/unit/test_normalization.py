"""Unit tests for aggregate normalization, gene selection and hand-off."""

import numpy as np
import pandas as pd
import pytest

from pseudorep.core.errors import (
    ConfigurationError,
    HandoffError,
    MissingGenesError,
    MissingGroupColumnError,
)
from pseudorep.core.matrix import ExpressionMatrix, UnitMetadata
from pseudorep.core.normalization import (
    TRANSFORMS,
    normalize_aggregates,
    prepare_network_input,
    select_genes,
)


class TestTransforms:
    """Tests for the transform registry."""

    def test_registry_keys(self):
        """Test that every supported transform is registered."""
        assert set(TRANSFORMS) == {"none", "cpm", "log_cpm", "log_normalize"}


class TestNormalizeAggregates:
    """Tests for normalize_aggregates."""

    def test_log_normalize(self, count_frame):
        """Test ln(1 + x / library_size * 1e4)."""
        matrix = ExpressionMatrix.from_frame(count_frame)
        result = normalize_aggregates(matrix, method="log_normalize")

        libsize = count_frame.sum(axis=0)
        expected = np.log1p(count_frame / libsize * 1e4)
        np.testing.assert_allclose(result.dense(), expected.to_numpy(), rtol=1e-5)
        assert list(result.unit_ids) == list(matrix.unit_ids)

    def test_cpm_sums_to_million(self, count_frame):
        """Test that CPM columns sum to one million."""
        result = normalize_aggregates(ExpressionMatrix.from_frame(count_frame), method="cpm")
        np.testing.assert_allclose(result.library_sizes().to_numpy(), 1e6, rtol=1e-5)

    def test_log_cpm(self, count_frame):
        """Test log2(CPM + 1)."""
        result = normalize_aggregates(ExpressionMatrix.from_frame(count_frame), method="log_cpm")
        cpm = count_frame / count_frame.sum(axis=0) * 1e6
        np.testing.assert_allclose(result.dense(), np.log2(cpm + 1).to_numpy(), rtol=1e-5)

    def test_zero_library_stays_zero(self):
        """Test that an all-zero unit stays zero after normalization."""
        frame = pd.DataFrame({"a": [1.0, 3.0], "b": [0.0, 0.0]}, index=["g1", "g2"])
        result = normalize_aggregates(ExpressionMatrix.from_frame(frame), method="log_normalize")
        np.testing.assert_allclose(result.dense()[:, 1], [0.0, 0.0])

    def test_none_returns_input(self, count_frame):
        """Test that "none" leaves the matrix untouched."""
        matrix = ExpressionMatrix.from_frame(count_frame)
        assert normalize_aggregates(matrix, method="none") is matrix

    def test_unknown_method(self, count_frame):
        """Test that an unknown method raises."""
        with pytest.raises(ConfigurationError):
            normalize_aggregates(ExpressionMatrix.from_frame(count_frame), method="tpm")


@pytest.fixture
def grouped_matrix():
    """Gene_rare is expressed in 2 of 4 B units and no A units."""
    frame = pd.DataFrame(
        {
            "a1": [5.0, 0.0, 1.0],
            "a2": [3.0, 0.0, 1.0],
            "a3": [2.0, 0.0, 0.0],
            "a4": [1.0, 0.0, 0.0],
            "b1": [4.0, 2.0, 0.0],
            "b2": [6.0, 1.0, 0.0],
            "b3": [2.0, 0.0, 0.0],
            "b4": [1.0, 0.0, 0.0],
        },
        index=["Gene_common", "Gene_rare", "Gene_a"],
    )
    metadata = UnitMetadata(
        table=pd.DataFrame({"group": list("AAAABBBB")}, index=frame.columns)
    )
    return ExpressionMatrix.from_frame(frame), metadata


class TestSelectGenes:
    """Tests for select_genes."""

    def test_fraction_overall(self, grouped_matrix):
        """Test the overall expressed-fraction filter."""
        matrix, _ = grouped_matrix
        assert select_genes(matrix, fraction=0.3) == ["Gene_common"]
        assert select_genes(matrix, fraction=0.25) == ["Gene_common", "Gene_rare", "Gene_a"]

    def test_fraction_per_group(self, grouped_matrix):
        """Test that a gene passing in any group is kept."""
        matrix, metadata = grouped_matrix
        selected = select_genes(matrix, fraction=0.5, metadata=metadata, group_by="group")
        assert selected == ["Gene_common", "Gene_rare", "Gene_a"]

    def test_per_group_requires_metadata(self, grouped_matrix):
        """Test that group_by without metadata raises."""
        matrix, _ = grouped_matrix
        with pytest.raises(ConfigurationError):
            select_genes(matrix, group_by="group")

    def test_per_group_missing_column(self, grouped_matrix):
        """Test that an unknown group column raises."""
        matrix, metadata = grouped_matrix
        with pytest.raises(MissingGroupColumnError):
            select_genes(matrix, metadata=metadata, group_by="region")

    def test_all(self, grouped_matrix):
        """Test keeping every gene."""
        matrix, _ = grouped_matrix
        assert select_genes(matrix, method="all") == ["Gene_common", "Gene_rare", "Gene_a"]

    def test_custom(self, grouped_matrix):
        """Test a custom gene list."""
        matrix, _ = grouped_matrix
        assert select_genes(matrix, method="custom", genes=["Gene_a"]) == ["Gene_a"]

    def test_custom_missing(self, grouped_matrix):
        """Test that unknown custom genes raise."""
        matrix, _ = grouped_matrix
        with pytest.raises(MissingGenesError):
            select_genes(matrix, method="custom", genes=["Gene_a", "GFAP"])

    def test_fraction_out_of_range(self, grouped_matrix):
        """Test that a fraction outside [0, 1] raises."""
        matrix, _ = grouped_matrix
        with pytest.raises(ConfigurationError):
            select_genes(matrix, fraction=1.5)


class TestPrepareNetworkInput:
    """Tests for prepare_network_input."""

    def test_valid_matrix(self, count_frame):
        """Test that a valid matrix passes through as genes x units."""
        frame = prepare_network_input(ExpressionMatrix.from_frame(count_frame))
        assert frame.shape == (5, 8)

    def test_single_unit(self, count_frame):
        """Test that one unit is not enough."""
        with pytest.raises(HandoffError):
            prepare_network_input(count_frame[["unit_0"]])

    def test_no_genes(self, count_frame):
        """Test that an empty gene set raises."""
        with pytest.raises(HandoffError):
            prepare_network_input(count_frame.iloc[:0])

    def test_missing_values(self, count_frame):
        """Test that NaN values raise."""
        frame = count_frame.copy()
        frame.iloc[0, 0] = np.nan
        with pytest.raises(HandoffError, match="missing values"):
            prepare_network_input(frame)

    def test_duplicate_units(self, count_frame):
        """Test that duplicate unit columns raise."""
        frame = count_frame.copy()
        frame.columns = ["u"] * 2 + [f"unit_{j}" for j in range(2, 8)]
        with pytest.raises(HandoffError, match="Unit identifiers"):
            prepare_network_input(frame)
