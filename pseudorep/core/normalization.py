"""Normalization, gene selection and network hand-off for aggregates.

Aggregated counts are normalized with scanpy before being handed to a
co-expression network library, which expects a genes x units table with
unique identifiers and no missing values.
"""

from dataclasses import dataclass
import logging
from typing import Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd
from scipy import sparse

from .errors import (
    ConfigurationError,
    HandoffError,
    MissingGenesError,
    MissingGroupColumnError,
)
from .matrix import ExpressionMatrix, UnitMetadata

logger = logging.getLogger(__name__)


@dataclass
class TransformSpec:
    """Specification for an aggregate normalization transform.

    Attributes
    ----------
    name : str
        Transform name (none, cpm, log_cpm, log_normalize)
    label : str
        Human-readable label
    """

    name: str
    label: str


TRANSFORMS: Dict[str, TransformSpec] = {
    "none": TransformSpec("none", "raw"),
    "cpm": TransformSpec("cpm", "counts per million"),
    "log_cpm": TransformSpec("log_cpm", "log2(CPM + 1)"),
    "log_normalize": TransformSpec("log_normalize", "ln(1 + x / size * scale)"),
}

GENE_SELECTION_METHODS = ("fraction", "all", "custom")


def normalize_aggregates(
    matrix: ExpressionMatrix,
    method: str = "log_normalize",
    scale_factor: float = 1e4,
) -> ExpressionMatrix:
    """Normalize an aggregate matrix.

    Parameters
    ----------
    matrix : ExpressionMatrix
        Genes x aggregates raw sums
    method : str
        Key in TRANSFORMS
    scale_factor : float
        Target library size for ``log_normalize``

    Returns
    -------
    ExpressionMatrix
        New matrix with the same identifiers; units with zero library size
        stay zero
    """
    import scanpy as sc

    if method not in TRANSFORMS:
        raise ConfigurationError(
            f"Unknown normalization method '{method}'",
            expected=list(TRANSFORMS),
            found=method,
        )
    if method == "none":
        return matrix

    adata = matrix.to_anndata()
    if method in ("cpm", "log_cpm"):
        sc.pp.normalize_total(adata, target_sum=1e6)
        if method == "log_cpm":
            sc.pp.log1p(adata, base=2)
    else:
        sc.pp.normalize_total(adata, target_sum=scale_factor)
        sc.pp.log1p(adata)

    X = adata.X
    values = X.T.tocsr() if sparse.issparse(X) else np.asarray(X).T
    logger.info(
        f"Normalized {matrix.n_units} aggregates x {matrix.n_genes} genes "
        f"({TRANSFORMS[method].label})"
    )
    return ExpressionMatrix(values=values, gene_ids=matrix.gene_ids, unit_ids=matrix.unit_ids)


def _expressed_fraction(values) -> np.ndarray:
    if sparse.issparse(values):
        n_expressed = np.asarray((values > 0).sum(axis=1)).ravel()
    else:
        n_expressed = (np.asarray(values) > 0).sum(axis=1)
    n_units = values.shape[1]
    if n_units == 0:
        return np.zeros(values.shape[0])
    return n_expressed / n_units


def select_genes(
    matrix: ExpressionMatrix,
    method: str = "fraction",
    fraction: float = 0.05,
    metadata: Optional[UnitMetadata] = None,
    group_by: Optional[str] = None,
    genes: Optional[Sequence[str]] = None,
) -> List[str]:
    """Select genes for network analysis.

    Parameters
    ----------
    matrix : ExpressionMatrix
        Genes x units matrix (source units or aggregates)
    method : str
        "fraction" keeps genes expressed in at least ``fraction`` of units,
        "all" keeps every gene, "custom" keeps ``genes``
    fraction : float
        Minimum fraction of units with a non-zero value
    metadata : UnitMetadata, optional
        Unit metadata; with ``group_by`` the fraction is evaluated per group
        and a gene passing in any group is kept
    group_by : str, optional
        Metadata column for per-group evaluation
    genes : Sequence[str], optional
        Gene list for "custom"

    Returns
    -------
    List[str]
        Selected gene ids
    """
    if method not in GENE_SELECTION_METHODS:
        raise ConfigurationError(
            f"Unknown gene selection method '{method}'",
            expected=list(GENE_SELECTION_METHODS),
            found=method,
        )

    if method == "all":
        return matrix.gene_ids.tolist()

    if method == "custom":
        if not genes:
            raise ConfigurationError("Custom gene selection requires a gene list")
        requested = [str(g) for g in genes]
        missing = [g for g in requested if g not in matrix.gene_ids]
        if missing:
            raise MissingGenesError(missing, len(requested))
        return requested

    if not 0 <= fraction <= 1:
        raise ConfigurationError("Gene fraction must be within [0, 1]", found=fraction)

    if group_by is None:
        keep = _expressed_fraction(matrix.values) >= fraction
    else:
        if metadata is None:
            raise ConfigurationError("Per-group gene selection requires unit metadata")
        metadata.require_columns([group_by], MissingGroupColumnError)
        labels = metadata.align_to(matrix).table[group_by]
        keep = np.zeros(matrix.n_genes, dtype=bool)
        for label in pd.unique(labels.dropna()):
            positions = np.flatnonzero((labels == label).to_numpy())
            keep |= _expressed_fraction(matrix.values[:, positions]) >= fraction

    selected = matrix.gene_ids[keep].tolist()
    logger.info(f"Selected {len(selected)} of {matrix.n_genes} genes (fraction >= {fraction})")
    return selected


def prepare_network_input(data: Union[ExpressionMatrix, pd.DataFrame]) -> pd.DataFrame:
    """Validate and return the genes x units table for network construction.

    Raises
    ------
    HandoffError
        On duplicate identifiers, missing values, fewer than two units or
        no genes
    """
    frame = data.to_frame() if isinstance(data, ExpressionMatrix) else data

    if frame.shape[1] < 2:
        raise HandoffError(
            "Network construction needs at least two units",
            expected=">= 2",
            found=frame.shape[1],
        )
    if frame.shape[0] < 1:
        raise HandoffError("Network construction needs at least one gene", found=0)
    if not frame.index.is_unique:
        raise HandoffError(
            "Gene identifiers are not unique",
            found=frame.index[frame.index.duplicated()].unique().tolist()[:10],
        )
    if not frame.columns.is_unique:
        raise HandoffError(
            "Unit identifiers are not unique",
            found=frame.columns[frame.columns.duplicated()].unique().tolist()[:10],
        )
    if frame.isna().to_numpy().any():
        raise HandoffError(
            "Expression table contains missing values",
            found=int(frame.isna().to_numpy().sum()),
            suggestion="Drop or impute missing values before network construction",
        )
    return frame
