"""Pytest configuration and shared fixtures for pseudorep tests."""

import sys
from pathlib import Path

import pytest
import numpy as np
import pandas as pd

# Add package to path
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Import mock data generators
from tests.fixtures import (
    create_count_frame,
    create_paired_units,
    create_snrna_adata,
    create_spatial_adata,
)


# ============================================================================
# Mock Data Fixtures
# ============================================================================


@pytest.fixture
def count_frame() -> pd.DataFrame:
    """Genes x units count frame (5 genes, 8 units)."""
    return create_count_frame()


@pytest.fixture
def paired_units():
    """Four spots in two spatially separate pairs, regions A, A, B, B."""
    return create_paired_units()


@pytest.fixture
def tmp_output_dir(tmp_path: Path) -> Path:
    """Create a temporary output directory for tests."""
    output_dir = tmp_path / "output"
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir


# ============================================================================
# AnnData Fixtures
# ============================================================================


@pytest.fixture
def spatial_adata():
    """10 x 10 grid of spots in two regions, 30 genes."""
    return create_spatial_adata()


@pytest.fixture
def snrna_adata():
    """ASC/NEU x S1..S11, 4 cells per partition, 20 genes."""
    return create_snrna_adata()


@pytest.fixture
def consensus_adata():
    """Three cell types x 22 samples with alternating msex (66 partitions)."""
    return create_snrna_adata(
        cell_types=("ASC", "NEU", "OPC"),
        n_samples=22,
        cells_per_partition=2,
        categorical_sex=True,
    )


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def sample_plan(tmp_path) -> Path:
    """Write a spatial AnnData and a three-run plan that uses it."""
    import yaml

    adata = create_spatial_adata(n_rows=6, n_cols=6, n_genes=12)
    adata.obs["cell_type"] = pd.Categorical(
        np.where(adata.obs["col"].to_numpy() % 2 == 0, "ASC", "NEU")
    )
    adata.obs["sample"] = np.where(adata.obs["row"].to_numpy() < 3, "S1", "S2")
    adata.obs["msex"] = np.where(adata.obs["row"].to_numpy() < 3, "0", "1")
    input_path = tmp_path / "data.h5ad"
    adata.write_h5ad(input_path)

    config = {
        "plan": {"name": "test_plan", "version": "1.0"},
        "global": {
            "input": str(input_path),
            "layer": "counts",
            "output_dir": str(tmp_path / "output"),
        },
        "runs": {
            "by_sex": {
                "kind": "split",
                "source": "cell_pb",
                "config": {"field": "msex"},
            },
            "region_metaspots": {
                "kind": "metaspots",
                "config": {"group_by": ["region"], "neighborhood_size": 4},
                "normalize": "log_normalize",
            },
            "cell_pb": {
                "kind": "pseudobulk",
                "config": {
                    "group_col": "cell_type",
                    "replicate_col": "sample",
                    "label_col": "msex",
                    "min_replicates": 1,
                },
            },
        },
    }

    path = tmp_path / "plan.yaml"
    with open(path, "w") as f:
        yaml.dump(config, f)

    return path
