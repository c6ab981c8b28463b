"""Split an aggregate x gene matrix into one matrix per label.

Used for consensus network analysis, where the same modules are sought in
several strata (e.g. sexes or conditions). The label of each row comes from
the first source that can resolve it:

1. an explicit lookup (label -> row ids)
2. a metadata column named after the field
3. the token at the field's position in the delimiter-joined row id

Labels and declared levels are compared in text form, with integral floats
written as integers (``1.0`` matches level ``1``).
"""

from dataclasses import dataclass, field as dc_field
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import pandas as pd

from ..errors import StratificationParseError, UnknownStratificationFieldError
from ..matrix import (
    AggregationResult,
    ExpressionMatrix,
    UnitMetadata,
    format_token,
    key_tokens,
)

logger = logging.getLogger(__name__)


@dataclass
class SplitResult:
    """Result from splitting a matrix by label.

    Attributes
    ----------
    field : str
        Stratification field
    matrices : Dict[str, pd.DataFrame]
        Label -> aggregate x gene frame, in level order
    labels : pd.Series
        Row id -> resolved label
    empty_levels : List[str]
        Declared levels with no rows
    resolved_from : str
        "lookup", "metadata" or "key"
    """

    field: str
    matrices: Dict[str, pd.DataFrame] = dc_field(default_factory=dict)
    labels: pd.Series = dc_field(default_factory=lambda: pd.Series(dtype=object))
    empty_levels: List[str] = dc_field(default_factory=list)
    resolved_from: str = ""

    @property
    def n_rows(self) -> int:
        return sum(len(df) for df in self.matrices.values())

    def sizes(self) -> Dict[str, int]:
        return {label: len(df) for label, df in self.matrices.items()}

    def summary_dict(self) -> Dict[str, Any]:
        """Return summary dictionary for JSON export."""
        return {
            "field": self.field,
            "resolved_from": self.resolved_from,
            "n_rows": self.n_rows,
            "sizes": self.sizes(),
            "empty_levels": list(self.empty_levels),
        }


def _as_row_frame(matrix: Union[pd.DataFrame, ExpressionMatrix]) -> pd.DataFrame:
    if isinstance(matrix, ExpressionMatrix):
        return matrix.to_frame().T
    return matrix


def _labels_from_lookup(rows: pd.Index, lookup: Mapping[Any, Sequence[Any]]) -> pd.Series:
    assigned: Dict[str, str] = {}
    for label, row_ids in lookup.items():
        for row_id in row_ids:
            row_id = str(row_id)
            if row_id in assigned:
                raise StratificationParseError(
                    f"Row '{row_id}' appears more than once in the lookup",
                    row_id=row_id,
                    found=[assigned[row_id], format_token(label)],
                )
            assigned[row_id] = format_token(label)
    missing = [r for r in rows if r not in assigned]
    if missing:
        raise StratificationParseError(
            f"Row '{missing[0]}' is missing from the lookup",
            row_id=missing[0],
            context={"n_missing": len(missing)},
        )
    extra = len(assigned) - len(rows)
    if extra:
        logger.debug("Lookup lists %d rows not present in the matrix", extra)
    return pd.Series([assigned[r] for r in rows], index=rows, dtype=object)


def _labels_from_metadata(rows: pd.Index, table: pd.DataFrame, field: str) -> pd.Series:
    values = table[field].reindex(rows)
    missing = values.index[values.isna()]
    if len(missing):
        raise StratificationParseError(
            f"Row '{missing[0]}' has no value for '{field}'",
            row_id=str(missing[0]),
            context={"n_missing": len(missing)},
        )
    return key_tokens(values, field)


def _labels_from_key(rows: pd.Index, key_fields: Sequence[str], field: str, delimiter: str) -> pd.Series:
    position = list(key_fields).index(field)
    labels = []
    for row_id in rows:
        tokens = str(row_id).split(delimiter)
        if len(tokens) != len(key_fields):
            raise StratificationParseError(
                f"Row '{row_id}' has {len(tokens)} tokens, expected {len(key_fields)}",
                row_id=str(row_id),
                expected=list(key_fields),
                found=tokens,
            )
        labels.append(tokens[position])
    return pd.Series(labels, index=rows, dtype=object)


def split_by_label(
    matrix: Union[pd.DataFrame, ExpressionMatrix],
    field: str,
    key_fields: Optional[Sequence[str]] = None,
    metadata: Optional[Union[pd.DataFrame, UnitMetadata]] = None,
    lookup: Optional[Mapping[Any, Sequence[Any]]] = None,
    levels: Optional[Sequence[Any]] = None,
    delimiter: str = ":",
) -> SplitResult:
    """Split rows of an aggregate x gene matrix by a stratification label.

    Parameters
    ----------
    matrix : pd.DataFrame or ExpressionMatrix
        Aggregate x gene frame (an ExpressionMatrix is transposed)
    field : str
        Stratification field name
    key_fields : Sequence[str], optional
        Names of the tokens in a row id
    metadata : pd.DataFrame or UnitMetadata, optional
        Per-row metadata indexed by row id
    lookup : Mapping, optional
        Label -> row ids; takes precedence over metadata and row ids
    levels : Sequence, optional
        Declared labels, in output order
    delimiter : str
        Row-id token delimiter

    Returns
    -------
    SplitResult
        Every input row appears in exactly one output matrix

    Raises
    ------
    UnknownStratificationFieldError
        If no source can resolve ``field``
    StratificationParseError
        On malformed row ids, lookup gaps or duplicates, or labels outside
        ``levels``
    """
    frame = _as_row_frame(matrix)
    rows = pd.Index([str(r) for r in frame.index])
    frame = frame.set_axis(rows, axis=0)
    table = metadata.table if isinstance(metadata, UnitMetadata) else metadata
    if table is not None:
        table = table.set_axis([str(i) for i in table.index], axis=0)

    if lookup is not None:
        labels = _labels_from_lookup(rows, lookup)
        resolved_from = "lookup"
    elif table is not None and field in table.columns:
        labels = _labels_from_metadata(rows, table, field)
        resolved_from = "metadata"
        if levels is None and isinstance(table[field].dtype, pd.CategoricalDtype):
            levels = list(table[field].cat.categories)
    elif key_fields is not None and field in key_fields:
        labels = _labels_from_key(rows, key_fields, field, delimiter)
        resolved_from = "key"
    else:
        available = list(key_fields or [])
        if table is not None:
            available += [str(c) for c in table.columns]
        raise UnknownStratificationFieldError(field, available=available)

    observed = sorted(pd.unique(labels))
    if levels is not None:
        order = [format_token(level) for level in levels]
        outside = labels[~labels.isin(order)]
        if len(outside):
            raise StratificationParseError(
                f"Row '{outside.index[0]}' has label '{outside.iloc[0]}' outside declared levels",
                row_id=str(outside.index[0]),
                expected=order,
                found=sorted(pd.unique(outside)),
            )
    else:
        order = observed

    matrices: Dict[str, pd.DataFrame] = {}
    empty_levels: List[str] = []
    for label in order:
        part = frame.loc[(labels == label).to_numpy()]
        if part.empty:
            empty_levels.append(label)
            logger.warning(f"Level '{label}' of '{field}' has no rows; emitting an empty matrix")
        matrices[label] = part

    logger.info(
        f"Split {len(rows)} rows by '{field}' ({resolved_from}) into "
        + ", ".join(f"{k}={len(v)}" for k, v in matrices.items())
    )
    return SplitResult(
        field=field,
        matrices=matrices,
        labels=labels,
        empty_levels=empty_levels,
        resolved_from=resolved_from,
    )


def split_result(
    result: AggregationResult,
    field: str,
    levels: Optional[Sequence[Any]] = None,
    lookup: Optional[Mapping[Any, Sequence[Any]]] = None,
) -> SplitResult:
    """Split an AggregationResult using its obs, key fields and delimiter."""
    return split_by_label(
        result.to_frame(),
        field,
        key_fields=result.key_fields,
        metadata=result.obs,
        lookup=lookup,
        levels=levels,
        delimiter=result.delimiter,
    )
