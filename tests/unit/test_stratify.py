"""Unit tests for the multi-group splitter."""

import pandas as pd
import pytest

from pseudorep.core.errors import (
    ConfigurationError,
    StratificationParseError,
    UnknownStratificationFieldError,
)
from pseudorep.core.matrix import ExpressionMatrix, UnitMetadata
from pseudorep.core.pseudobulk import construct_pseudobulk
from pseudorep.core.stratify import StratifyConfig, split_by_label, split_result


@pytest.fixture
def consensus_result(consensus_adata):
    matrix = ExpressionMatrix.from_anndata(consensus_adata, layer="counts")
    metadata = UnitMetadata.from_anndata(consensus_adata)
    return construct_pseudobulk(matrix, metadata, label_col="msex")


@pytest.fixture
def small_frame():
    return pd.DataFrame(
        [[1.0, 2.0], [3.0, 4.0], [5.0, 6.0], [7.0, 8.0]],
        index=["ASC:S1:0", "ASC:S2:1", "NEU:S1:0", "NEU:S2:1"],
        columns=["Gene_0", "Gene_1"],
    )


KEY_FIELDS = ["cell_type", "sample", "msex"]


class TestStratifyConfig:
    """Tests for StratifyConfig."""

    def test_field_required(self):
        """Test that an empty field is rejected."""
        with pytest.raises(ConfigurationError):
            StratifyConfig().validate()

    def test_from_dict(self):
        """Test creating config from dict."""
        config = StratifyConfig.from_dict({"field": "msex", "levels": [0, 1]})
        assert config.field == "msex"
        assert config.levels == [0, 1]


class TestSplitByLabel:
    """Tests for split_by_label."""

    def test_consensus_split(self, consensus_result):
        """Test that 66 pseudobulk rows split into two strata of 33."""
        assert consensus_result.n_aggregates == 66
        split = split_result(consensus_result, "msex")

        assert split.resolved_from == "metadata"
        assert split.sizes() == {"0": 33, "1": 33}
        assert split.n_rows == 66
        rows = [r for df in split.matrices.values() for r in df.index]
        assert sorted(rows) == sorted(consensus_result.matrix.unit_ids)
        assert all(r.endswith(":0") for r in split.matrices["0"].index)

    def test_columns_preserved(self, consensus_result):
        """Test that every stratum keeps the full gene set."""
        split = split_result(consensus_result, "msex")
        for df in split.matrices.values():
            assert list(df.columns) == list(consensus_result.matrix.gene_ids)

    def test_key_token_resolution(self, small_frame):
        """Test resolving labels from row-id tokens."""
        split = split_by_label(small_frame, "msex", key_fields=KEY_FIELDS)
        assert split.resolved_from == "key"
        assert list(split.matrices["0"].index) == ["ASC:S1:0", "NEU:S1:0"]
        assert list(split.matrices["1"].index) == ["ASC:S2:1", "NEU:S2:1"]

    def test_key_token_other_field(self, small_frame):
        """Test splitting by the first key token."""
        split = split_by_label(small_frame, "cell_type", key_fields=KEY_FIELDS)
        assert split.sizes() == {"ASC": 2, "NEU": 2}

    def test_metadata_takes_precedence_over_key(self, small_frame):
        """Test that a metadata column overrides row-id tokens."""
        metadata = pd.DataFrame({"msex": ["1", "1", "1", "0"]}, index=small_frame.index)
        split = split_by_label(small_frame, "msex", key_fields=KEY_FIELDS, metadata=metadata)
        assert split.resolved_from == "metadata"
        assert split.sizes() == {"0": 1, "1": 3}

    def test_lookup_takes_precedence(self, small_frame):
        """Test that an explicit lookup overrides metadata."""
        metadata = pd.DataFrame({"msex": ["0", "1", "0", "1"]}, index=small_frame.index)
        lookup = {"F": ["ASC:S1:0"], "M": ["ASC:S2:1", "NEU:S1:0", "NEU:S2:1"]}
        split = split_by_label(small_frame, "msex", key_fields=KEY_FIELDS, metadata=metadata, lookup=lookup)
        assert split.resolved_from == "lookup"
        assert split.sizes() == {"F": 1, "M": 3}

    def test_lookup_duplicate_row(self, small_frame):
        """Test that a row listed under two labels raises."""
        lookup = {"F": ["ASC:S1:0", "ASC:S2:1"], "M": ["ASC:S2:1", "NEU:S1:0", "NEU:S2:1"]}
        with pytest.raises(StratificationParseError) as exc_info:
            split_by_label(small_frame, "msex", lookup=lookup)
        assert exc_info.value.row_id == "ASC:S2:1"

    def test_lookup_missing_row(self, small_frame):
        """Test that a row absent from the lookup raises."""
        lookup = {"F": ["ASC:S1:0"], "M": ["ASC:S2:1", "NEU:S1:0"]}
        with pytest.raises(StratificationParseError) as exc_info:
            split_by_label(small_frame, "msex", lookup=lookup)
        assert exc_info.value.row_id == "NEU:S2:1"

    def test_malformed_row_id(self, small_frame):
        """Test that a row id with the wrong token count raises."""
        frame = small_frame.rename(index={"NEU:S2:1": "NEU:S2"})
        with pytest.raises(StratificationParseError) as exc_info:
            split_by_label(frame, "msex", key_fields=KEY_FIELDS)
        assert exc_info.value.row_id == "NEU:S2"

    def test_unknown_field(self, small_frame):
        """Test that an unresolvable field raises with suggestions."""
        with pytest.raises(UnknownStratificationFieldError) as exc_info:
            split_by_label(small_frame, "sex", key_fields=KEY_FIELDS)
        assert exc_info.value.field == "sex"
        assert "msex" in exc_info.value.suggestion

    def test_missing_metadata_value(self, small_frame):
        """Test that a row without a metadata label raises."""
        metadata = pd.DataFrame({"msex": ["0", None, "0", "1"]}, index=small_frame.index)
        with pytest.raises(StratificationParseError) as exc_info:
            split_by_label(small_frame, "msex", metadata=metadata)
        assert exc_info.value.row_id == "ASC:S2:1"

    def test_label_outside_levels(self, small_frame):
        """Test that labels outside the declared levels raise."""
        with pytest.raises(StratificationParseError):
            split_by_label(small_frame, "msex", key_fields=KEY_FIELDS, levels=["0"])

    def test_declared_empty_level(self, small_frame):
        """Test that a declared level without rows yields an empty matrix."""
        split = split_by_label(small_frame, "msex", key_fields=KEY_FIELDS, levels=[1, 0, 2])
        assert list(split.matrices) == ["1", "0", "2"]
        assert split.empty_levels == ["2"]
        assert split.matrices["2"].empty
        assert list(split.matrices["2"].columns) == ["Gene_0", "Gene_1"]

    def test_categorical_metadata_levels(self):
        """Test that categorical metadata supplies the level set."""
        frame = pd.DataFrame([[1.0], [2.0]], index=["a", "b"], columns=["Gene_0"])
        metadata = pd.DataFrame(
            {"msex": pd.Categorical(["0", "0"], categories=["0", "1"])}, index=["a", "b"]
        )
        split = split_by_label(frame, "msex", metadata=metadata)
        assert split.sizes() == {"0": 2, "1": 0}
        assert split.empty_levels == ["1"]

    def test_float_metadata_matches_integer_levels(self, small_frame):
        """Test that float labels such as 0.0 match declared levels 0 and 1."""
        metadata = pd.DataFrame({"msex": [0.0, 1.0, 0.0, 1.0]}, index=small_frame.index)
        split = split_by_label(small_frame, "msex", metadata=metadata, levels=[0, 1])
        assert split.sizes() == {"0": 2, "1": 2}
        assert split.empty_levels == []

    def test_float_lookup_labels(self, small_frame):
        """Test that float lookup labels are written as integers."""
        lookup = {0.0: ["ASC:S1:0", "NEU:S1:0"], 1.0: ["ASC:S2:1", "NEU:S2:1"]}
        split = split_by_label(small_frame, "msex", lookup=lookup)
        assert split.sizes() == {"0": 2, "1": 2}

    def test_expression_matrix_input(self, small_frame):
        """Test that an ExpressionMatrix (genes x units) is accepted."""
        matrix = ExpressionMatrix.from_frame(small_frame.T)
        split = split_by_label(matrix, "msex", key_fields=KEY_FIELDS)
        assert split.sizes() == {"0": 2, "1": 2}

    def test_summary_dict(self, small_frame):
        """Test the JSON summary of a split."""
        summary = split_by_label(small_frame, "msex", key_fields=KEY_FIELDS).summary_dict()
        assert summary["n_rows"] == 4
        assert summary["sizes"] == {"0": 2, "1": 2}
        assert summary["resolved_from"] == "key"
