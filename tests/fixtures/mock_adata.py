"""Mock AnnData generators for testing.

Provides functions to create small spatial (spot) and single-nucleus
(cell) AnnData objects with raw counts, without requiring real data.
"""

from typing import List, Optional, Sequence

import numpy as np
import pandas as pd


def create_spatial_adata(
    n_rows: int = 10,
    n_cols: int = 10,
    n_genes: int = 30,
    regions: Sequence[str] = ("cortex", "white_matter"),
    spot_spacing: float = 100.0,
    seed: int = 42,
    shuffle: bool = False,
) -> "AnnData":
    """Create a mock spatial transcriptomics AnnData on a square grid.

    Parameters
    ----------
    n_rows, n_cols : int
        Grid dimensions; one spot per grid position
    n_genes : int
        Number of genes
    regions : Sequence[str]
        Region labels assigned to consecutive vertical bands of columns
    spot_spacing : float
        Pixel distance between neighboring spots
    seed : int
        Random seed for reproducibility
    shuffle : bool
        Shuffle spot order (ids are unchanged)

    Returns
    -------
    AnnData
        Spots x genes, integer counts in X and layers["counts"]; obs has
        row, col, imagerow, imagecol and a categorical region
    """
    import anndata as ad

    np.random.seed(seed)
    n_spots = n_rows * n_cols

    rows, cols = np.divmod(np.arange(n_spots), n_cols)
    band = np.minimum(cols * len(regions) // n_cols, len(regions) - 1)

    X = np.random.poisson(lam=2.0, size=(n_spots, n_genes)).astype(np.float32)
    # region-specific signal on the first genes
    for i in range(len(regions)):
        X[band == i, i % n_genes] += 5

    obs = pd.DataFrame({
        "row": rows,
        "col": cols,
        "imagerow": rows * spot_spacing + 50.0,
        "imagecol": cols * spot_spacing + 50.0,
        "region": pd.Categorical([regions[b] for b in band], categories=list(regions)),
        "sample": "section_1",
    })
    obs.index = pd.Index([f"spot_{i:04d}" for i in range(n_spots)], name="spot_id")
    var = pd.DataFrame(index=[f"Gene_{i}" for i in range(n_genes)])

    adata = ad.AnnData(X=X, obs=obs, var=var)
    adata.layers["counts"] = X.copy()

    if shuffle:
        order = np.random.permutation(n_spots)
        adata = adata[order].copy()

    return adata


def create_snrna_adata(
    cell_types: Sequence[str] = ("ASC", "NEU"),
    n_samples: int = 11,
    cells_per_partition: int = 4,
    n_genes: int = 20,
    seed: int = 42,
    categorical_sex: bool = False,
) -> "AnnData":
    """Create a mock single-nucleus AnnData with cell type, sample and sex.

    Every (cell type, sample) combination holds ``cells_per_partition``
    cells. Samples are named S1..Sn; odd samples have msex=0, even msex=1.

    Returns
    -------
    AnnData
        Cells x genes, integer counts in X and layers["counts"]
    """
    import anndata as ad

    np.random.seed(seed)
    samples = [f"S{i + 1}" for i in range(n_samples)]

    records = []
    for cell_type in cell_types:
        for j, sample in enumerate(samples):
            for _ in range(cells_per_partition):
                records.append({"cell_type": cell_type, "sample": sample, "msex": j % 2})
    obs = pd.DataFrame.from_records(records)
    obs["cell_type"] = pd.Categorical(obs["cell_type"], categories=list(cell_types))
    if categorical_sex:
        obs["msex"] = pd.Categorical(obs["msex"], categories=[0, 1])
    obs.index = pd.Index([f"cell_{i:05d}" for i in range(len(obs))], name="cell_id")

    X = np.random.poisson(lam=1.5, size=(len(obs), n_genes)).astype(np.float32)
    var = pd.DataFrame(index=[f"Gene_{i}" for i in range(n_genes)])

    adata = ad.AnnData(X=X, obs=obs, var=var)
    adata.layers["counts"] = X.copy()
    return adata


def create_paired_units(
    regions: Optional[List[str]] = None,
    n_genes: int = 3,
) -> "AnnData":
    """Four spots forming two spatially separate pairs.

    Spots u1/u2 sit at grid (0, 0)/(0, 1) in region A; u3/u4 at
    (5, 5)/(5, 6) in region B. Counts are 1, 2, 3, 4 times a gene vector.
    """
    import anndata as ad

    if regions is None:
        regions = ["A", "A", "B", "B"]

    base = np.arange(1, n_genes + 1, dtype=np.float32)
    X = np.vstack([base * k for k in (1, 2, 3, 4)])
    obs = pd.DataFrame(
        {
            "row": [0, 0, 5, 5],
            "col": [0, 1, 5, 6],
            "imagerow": [0.0, 0.0, 500.0, 500.0],
            "imagecol": [0.0, 100.0, 500.0, 600.0],
            "region": regions,
        },
        index=pd.Index(["u1", "u2", "u3", "u4"], name="spot_id"),
    )
    var = pd.DataFrame(index=[f"Gene_{i}" for i in range(n_genes)])
    return ad.AnnData(X=X, obs=obs, var=var)


def create_count_frame(
    n_genes: int = 5,
    n_units: int = 8,
    seed: int = 42,
) -> pd.DataFrame:
    """Genes x units DataFrame of Poisson counts."""
    np.random.seed(seed)
    return pd.DataFrame(
        np.random.poisson(lam=3.0, size=(n_genes, n_units)).astype(float),
        index=[f"Gene_{i}" for i in range(n_genes)],
        columns=[f"unit_{j}" for j in range(n_units)],
    )
