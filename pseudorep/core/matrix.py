"""Immutable value types exchanged between aggregation stages.

ExpressionMatrix is genes x units (the orientation the network library
consumes); AnnData objects are units x genes and are transposed on the way
in and out.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple, Type, Union

import numpy as np
import pandas as pd
from scipy import sparse

from .errors import (
    ConfigurationError,
    MetadataMismatchError,
    MissingColumnError,
    ValidationError,
)

ArrayLike = Union[np.ndarray, sparse.spmatrix]


def _as_index(values: Iterable[Any], name: str) -> pd.Index:
    index = pd.Index([str(v) for v in values], name=name)
    return index


@dataclass(frozen=True)
class ExpressionMatrix:
    """Genes x units expression values with unique identifiers on both axes.

    Attributes
    ----------
    values : np.ndarray or scipy.sparse.csr_matrix
        Non-negative counts or normalized values (n_genes x n_units)
    gene_ids : pd.Index
        Gene identifiers (rows)
    unit_ids : pd.Index
        Unit identifiers (columns): cells, spots or aggregates
    """

    values: ArrayLike
    gene_ids: pd.Index
    unit_ids: pd.Index

    def __post_init__(self):
        values = self.values
        if sparse.issparse(values):
            values = sparse.csr_matrix(values, dtype=np.float64)
            data = values.data
        else:
            values = np.array(values, dtype=np.float64)
            if values.ndim != 2:
                raise ValidationError(f"Expression values must be 2-D, got {values.ndim}-D")
            data = values
            values.setflags(write=False)

        gene_ids = _as_index(self.gene_ids, "gene")
        unit_ids = _as_index(self.unit_ids, "unit")

        if values.shape != (len(gene_ids), len(unit_ids)):
            raise ValidationError(
                "Expression values do not match identifiers",
                expected=(len(gene_ids), len(unit_ids)),
                found=values.shape,
            )
        if not gene_ids.is_unique:
            dupes = gene_ids[gene_ids.duplicated()].unique().tolist()
            raise ValidationError("Gene identifiers are not unique", found=dupes[:10])
        if not unit_ids.is_unique:
            dupes = unit_ids[unit_ids.duplicated()].unique().tolist()
            raise ValidationError("Unit identifiers are not unique", found=dupes[:10])
        if data.size:
            if np.isnan(data).any():
                raise ValidationError("Expression values contain NaN")
            if data.min() < 0:
                raise ValidationError("Expression values must be non-negative", found=float(data.min()))

        object.__setattr__(self, "values", values)
        object.__setattr__(self, "gene_ids", gene_ids)
        object.__setattr__(self, "unit_ids", unit_ids)

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def from_anndata(cls, adata, layer: Optional[str] = None) -> "ExpressionMatrix":
        """Build from an AnnData (units x genes), optionally from a layer.

        Parameters
        ----------
        adata : AnnData
            Source object; ``obs_names`` become unit ids, ``var_names`` gene ids
        layer : str, optional
            Layer to read instead of ``X`` (e.g. "counts")

        Returns
        -------
        ExpressionMatrix
        """
        if layer is not None:
            if layer not in adata.layers:
                raise ConfigurationError(
                    f"Layer '{layer}' not found in AnnData",
                    expected=layer,
                    found=list(adata.layers.keys()),
                )
            X = adata.layers[layer]
        else:
            X = adata.X
        X = X.T.tocsr() if sparse.issparse(X) else np.asarray(X).T
        return cls(values=X, gene_ids=adata.var_names, unit_ids=adata.obs_names)

    @classmethod
    def from_frame(cls, df: pd.DataFrame) -> "ExpressionMatrix":
        """Build from a genes x units DataFrame."""
        return cls(values=df.to_numpy(dtype=np.float64), gene_ids=df.index, unit_ids=df.columns)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def shape(self) -> Tuple[int, int]:
        return self.values.shape

    @property
    def n_genes(self) -> int:
        return len(self.gene_ids)

    @property
    def n_units(self) -> int:
        return len(self.unit_ids)

    @property
    def is_sparse(self) -> bool:
        return sparse.issparse(self.values)

    # ------------------------------------------------------------------
    # Access and subsetting
    # ------------------------------------------------------------------

    def dense(self) -> np.ndarray:
        """Return a dense copy of the values."""
        if self.is_sparse:
            return self.values.toarray()
        return np.array(self.values)

    def library_sizes(self) -> pd.Series:
        """Total value per unit."""
        totals = np.asarray(self.values.sum(axis=0)).ravel()
        return pd.Series(totals, index=self.unit_ids, name="library_size")

    def _positions(self, index: pd.Index, ids: Sequence[Any], axis: str) -> np.ndarray:
        ids = [str(i) for i in ids]
        positions = index.get_indexer(ids)
        if (positions < 0).any():
            missing = [i for i, p in zip(ids, positions) if p < 0]
            raise ValidationError(f"Unknown {axis} identifiers", found=missing[:10])
        return positions

    def subset_units(self, unit_ids: Sequence[Any]) -> "ExpressionMatrix":
        """Return a new matrix restricted (and ordered) to ``unit_ids``."""
        positions = self._positions(self.unit_ids, unit_ids, "unit")
        return ExpressionMatrix(
            values=self.values[:, positions],
            gene_ids=self.gene_ids,
            unit_ids=self.unit_ids[positions],
        )

    def subset_genes(self, gene_ids: Sequence[Any]) -> "ExpressionMatrix":
        """Return a new matrix restricted (and ordered) to ``gene_ids``."""
        positions = self._positions(self.gene_ids, gene_ids, "gene")
        return ExpressionMatrix(
            values=self.values[positions, :],
            gene_ids=self.gene_ids[positions],
            unit_ids=self.unit_ids,
        )

    def reorder_units(self, unit_ids: Sequence[Any]) -> "ExpressionMatrix":
        """Reorder units; ``unit_ids`` must be a permutation of the current ids."""
        if len(unit_ids) != self.n_units:
            raise ValidationError(
                "Reordering must keep every unit",
                expected=self.n_units,
                found=len(unit_ids),
            )
        return self.subset_units(unit_ids)

    # ------------------------------------------------------------------
    # Conversion
    # ------------------------------------------------------------------

    def to_frame(self) -> pd.DataFrame:
        """Genes x units DataFrame (dense)."""
        return pd.DataFrame(self.dense(), index=self.gene_ids.copy(), columns=self.unit_ids.copy())

    def to_anndata(self, obs: Optional[pd.DataFrame] = None):
        """Units x genes AnnData, with ``obs`` aligned to the unit ids."""
        import anndata as ad

        X = self.values.T.tocsr() if self.is_sparse else self.dense().T
        if obs is None:
            obs = pd.DataFrame(index=self.unit_ids.copy())
        else:
            obs = obs.reindex(self.unit_ids)
        var = pd.DataFrame(index=self.gene_ids.copy())
        return ad.AnnData(X=X, obs=obs, var=var)


@dataclass(frozen=True)
class UnitMetadata:
    """Per-unit attributes indexed by unit id.

    Attributes
    ----------
    table : pd.DataFrame
        One row per unit; columns hold group labels, coordinates, replicates
    """

    table: pd.DataFrame

    def __post_init__(self):
        table = self.table.copy()
        table.index = _as_index(table.index, "unit")
        if not table.index.is_unique:
            dupes = table.index[table.index.duplicated()].unique().tolist()
            raise ValidationError("Unit metadata index is not unique", found=dupes[:10])
        object.__setattr__(self, "table", table)

    @classmethod
    def from_anndata(cls, adata) -> "UnitMetadata":
        return cls(table=adata.obs)

    @property
    def columns(self) -> List[str]:
        return [str(c) for c in self.table.columns]

    def __len__(self) -> int:
        return len(self.table)

    def require_columns(
        self,
        columns: Iterable[str],
        error_cls: Type[MissingColumnError] = MissingColumnError,
    ) -> None:
        """Raise ``error_cls`` for the first column not present."""
        for col in columns:
            if col not in self.table.columns:
                raise error_cls(col, available=self.columns)

    def align_to(self, matrix: ExpressionMatrix) -> "UnitMetadata":
        """Return metadata ordered like ``matrix`` units.

        Raises
        ------
        MetadataMismatchError
            If any matrix unit has no metadata record
        """
        missing = matrix.unit_ids.difference(self.table.index)
        if len(missing):
            raise MetadataMismatchError(
                f"{len(missing)} expression units have no metadata record",
                found=missing[:10].tolist(),
                context={"n_missing": len(missing)},
            )
        return UnitMetadata(table=self.table.loc[matrix.unit_ids])

    def subset(self, unit_ids: Sequence[Any]) -> "UnitMetadata":
        return UnitMetadata(table=self.table.loc[[str(u) for u in unit_ids]])


@dataclass(frozen=True)
class AggregateUnit:
    """One aggregate built from a set of source units."""

    aggregate_id: str
    group: Mapping[str, Any]
    members: Tuple[str, ...]
    expression: pd.Series

    @property
    def n_units(self) -> int:
        return len(self.members)


@dataclass
class AggregationResult:
    """Result from one aggregation pass.

    Attributes
    ----------
    kind : str
        "metaspots" or "pseudobulk"
    matrix : ExpressionMatrix
        Genes x aggregates values
    obs : pd.DataFrame
        One row per aggregate (group values, n_units, centroids)
    members : Dict[str, Tuple[str, ...]]
        Aggregate id -> contributing source unit ids
    excluded : Dict[str, int]
        Group key -> number of source units left out
    key_fields : List[str]
        Names of the tokens encoded in an aggregate id, in order
    delimiter : str
        Token delimiter used in aggregate ids
    warnings : List[str]
        Non-fatal conditions encountered
    provenance : Dict[str, Any]
        Configuration and input summary for the audit trail
    execution_time_seconds : float
        Wall time of the pass
    """

    kind: str
    matrix: ExpressionMatrix
    obs: pd.DataFrame
    members: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    excluded: Dict[str, int] = field(default_factory=dict)
    key_fields: List[str] = field(default_factory=list)
    delimiter: str = ":"
    warnings: List[str] = field(default_factory=list)
    provenance: Dict[str, Any] = field(default_factory=dict)
    execution_time_seconds: float = 0.0

    @property
    def n_aggregates(self) -> int:
        return self.matrix.n_units

    @property
    def n_units_aggregated(self) -> int:
        return sum(len(m) for m in self.members.values())

    @property
    def n_units_excluded(self) -> int:
        return sum(self.excluded.values())

    def to_frame(self) -> pd.DataFrame:
        """Aggregate x gene DataFrame (row ids encode the partition key)."""
        return self.matrix.to_frame().T

    def to_anndata(self):
        """Aggregates x genes AnnData with ``obs`` as aggregate metadata."""
        adata = self.matrix.to_anndata(obs=self.obs)
        adata.uns["aggregation"] = {
            "kind": self.kind,
            "key_fields": list(self.key_fields),
            "delimiter": self.delimiter,
        }
        return adata

    def aggregate_units(self) -> Iterator[AggregateUnit]:
        """Yield one AggregateUnit per aggregate, in matrix order."""
        frame = self.matrix.to_frame()
        group_cols = [c for c in self.key_fields if c in self.obs.columns]
        for agg_id in self.matrix.unit_ids:
            row = self.obs.loc[agg_id]
            yield AggregateUnit(
                aggregate_id=agg_id,
                group={c: row[c] for c in group_cols},
                members=tuple(self.members.get(agg_id, ())),
                expression=frame[agg_id],
            )

    def summary_dict(self) -> Dict[str, Any]:
        """Return summary dictionary for JSON export."""
        return {
            "kind": self.kind,
            "n_aggregates": self.n_aggregates,
            "n_genes": self.matrix.n_genes,
            "n_units_aggregated": self.n_units_aggregated,
            "n_units_excluded": self.n_units_excluded,
            "excluded": {str(k): int(v) for k, v in self.excluded.items()},
            "key_fields": list(self.key_fields),
            "delimiter": self.delimiter,
            "execution_time_seconds": round(self.execution_time_seconds, 2),
            "n_warnings": len(self.warnings),
            "warnings": list(self.warnings),
        }


def format_token(value: Any) -> str:
    """Text form of a key or label value; integral floats print as integers."""
    if isinstance(value, (float, np.floating)) and np.isfinite(value) and float(value).is_integer():
        return str(int(value))
    return str(value)


def key_tokens(values: pd.Series, name: Optional[str] = None) -> pd.Series:
    """Text tokens for the non-missing values of one key column.

    Columns read back from CSV or h5ad often store integer codes as floats,
    so ``1.0`` and ``1`` share the token ``"1"``.

    Raises
    ------
    ConfigurationError
        If distinct values share a token (e.g. ``1`` and ``"1"``)
    """
    raw = values.astype(object)
    present = raw.notna()
    tokens = raw.map(format_token).where(present)
    per_token = raw[present].groupby(tokens[present]).nunique()
    shared = per_token[per_token > 1]
    if len(shared):
        label = name if name is not None else values.name
        raise ConfigurationError(
            f"Distinct values of '{label}' have the same text form",
            found=sorted(shared.index)[:10],
            suggestion=f"Store '{label}' with a single type",
        )
    return tokens


def indicator_matrix(codes: np.ndarray, n_groups: int) -> sparse.csr_matrix:
    """Units x groups one-hot matrix from integer group codes.

    Units with a negative code belong to no group.
    """
    codes = np.asarray(codes, dtype=np.int64)
    keep = codes >= 0
    rows = np.flatnonzero(keep)
    data = np.ones(len(rows), dtype=np.float64)
    return sparse.csr_matrix((data, (rows, codes[keep])), shape=(len(codes), n_groups))


def aggregate_values(values: ArrayLike, indicator: sparse.csr_matrix, mode: str = "sum") -> ArrayLike:
    """Collapse genes x units ``values`` into genes x groups.

    Parameters
    ----------
    values : np.ndarray or scipy.sparse matrix
        Genes x units values
    indicator : scipy.sparse.csr_matrix
        Units x groups one-hot membership (see ``indicator_matrix``)
    mode : str
        "sum" or "mean" over group members

    Returns
    -------
    np.ndarray or scipy.sparse.csr_matrix
        Sparse when ``values`` is sparse
    """
    if mode not in ("sum", "mean"):
        raise ConfigurationError(f"Unknown aggregation mode '{mode}'", expected=["sum", "mean"], found=mode)

    if sparse.issparse(values):
        out = sparse.csr_matrix(values @ indicator)
    else:
        out = np.asarray(indicator.T @ np.asarray(values).T).T

    if mode == "mean":
        counts = np.asarray(indicator.sum(axis=0)).ravel()
        scale = np.divide(1.0, counts, out=np.zeros_like(counts), where=counts > 0)
        if sparse.issparse(out):
            out = sparse.csr_matrix(out @ sparse.diags(scale))
        else:
            out = out * scale[np.newaxis, :]
    return out
