"""Pseudobulk engine: sum counts per (group, replicate[, label]) partition.

Each observed combination of the key columns becomes one pseudo-replicate
whose expression is the per-gene sum of its member cells. Only observed
combinations are emitted; rows are ordered by the sorted partition key.
"""

from dataclasses import replace
from datetime import datetime
import logging
import time
import warnings
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from ..errors import (
    ConfigurationError,
    EmptyPartitionError,
    LowReplicateWarning,
    MissingGenesError,
    MissingGroupColumnError,
    MissingLabelColumnError,
    MissingReplicateColumnError,
)
from ..matrix import (
    AggregationResult,
    ExpressionMatrix,
    UnitMetadata,
    aggregate_values,
    format_token,
    indicator_matrix,
    key_tokens,
)
from .config import PseudobulkConfig

MISSING_TOKEN = "NA"


class PseudobulkEngine:
    """Build pseudobulk profiles from cell-level counts.

    Parameters
    ----------
    config : PseudobulkConfig, optional
        Engine configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, uses the module logger.

    Example
    -------
    >>> from pseudorep.core.pseudobulk import PseudobulkEngine, PseudobulkConfig
    >>> config = PseudobulkConfig(group_col="cell_type", replicate_col="sample")
    >>> result = PseudobulkEngine(config).execute(matrix, metadata)
    >>> result.to_frame().index[:2].tolist()
    ['ASC:S1', 'ASC:S10']
    """

    def __init__(
        self,
        config: Optional[PseudobulkConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or PseudobulkConfig()
        self.logger = logger or logging.getLogger(__name__)

    def validate(self, matrix: ExpressionMatrix, metadata: UnitMetadata) -> UnitMetadata:
        """Check column roles and requested genes before any computation.

        Returns
        -------
        UnitMetadata
            Metadata aligned to the matrix units
        """
        cfg = self.config
        cfg.validate()
        metadata.require_columns([cfg.group_col], MissingGroupColumnError)
        metadata.require_columns([cfg.replicate_col], MissingReplicateColumnError)
        if cfg.label_col:
            metadata.require_columns([cfg.label_col], MissingLabelColumnError)
        if cfg.genes:
            missing = [str(g) for g in cfg.genes if str(g) not in matrix.gene_ids]
            if missing:
                raise MissingGenesError(missing, len(cfg.genes))
        return metadata.align_to(matrix)

    def execute(self, matrix: ExpressionMatrix, metadata: UnitMetadata) -> AggregationResult:
        """Build pseudobulk profiles.

        Parameters
        ----------
        matrix : ExpressionMatrix
            Genes x cells raw counts
        metadata : UnitMetadata
            Cell metadata with group, replicate and optional label columns

        Returns
        -------
        AggregationResult
            kind="pseudobulk"; row ids are "<group><delim><replicate>[<delim><label>]"

        Raises
        ------
        EmptyPartitionError
            If no cells remain after filtering, or a requested group is empty
        """
        start_time = time.time()
        cfg = self.config
        aligned = self.validate(matrix, metadata)

        if cfg.units is not None:
            wanted = set(str(u) for u in cfg.units)
            keep_ids = [u for u in matrix.unit_ids if u in wanted]
            self.logger.info("Restricting to %d of %d units", len(keep_ids), matrix.n_units)
        else:
            keep_ids = list(matrix.unit_ids)
        matrix = matrix.subset_units(sorted(keep_ids))
        if cfg.genes:
            matrix = matrix.subset_genes(cfg.genes)
        table = aligned.table.loc[matrix.unit_ids]

        key_fields = cfg.key_fields
        complete = table[key_fields].notna().all(axis=1)
        excluded: Dict[str, int] = {}
        if (~complete).any():
            dropped_groups = (
                table.loc[~complete, cfg.group_col].astype(object).where(
                    table.loc[~complete, cfg.group_col].notna(), MISSING_TOKEN
                ).astype(str)
            )
            for group, count in dropped_groups.value_counts().items():
                excluded[str(group)] = int(count)
            self.logger.info("Excluded %d units with missing key values", int((~complete).sum()))

        kept = table.loc[complete]
        if kept.empty:
            raise EmptyPartitionError(
                "No units remain after filtering",
                observed=0,
                required=1,
            )

        tokens = pd.DataFrame(
            {col: key_tokens(kept[col], col) for col in key_fields}, index=kept.index
        )
        for col in key_fields:
            bad = tokens[col][tokens[col].str.contains(cfg.delimiter, regex=False)]
            if len(bad):
                raise ConfigurationError(
                    f"Values of '{col}' contain the delimiter '{cfg.delimiter}'",
                    found=bad.unique().tolist()[:10],
                    suggestion="Choose a delimiter that does not occur in key values",
                )

        if cfg.groups is not None:
            present = set(tokens[cfg.group_col])
            kept_mask = tokens[cfg.group_col].isin([format_token(g) for g in cfg.groups])
            for group in cfg.groups:
                if format_token(group) not in present:
                    raise EmptyPartitionError(
                        f"Requested group '{group}' has no units",
                        group_key=format_token(group),
                        observed=0,
                        required=1,
                        suggestion=f"Available groups: {', '.join(sorted(present)[:10])}",
                    )
            tokens = tokens.loc[kept_mask]

        key_tuples = list(tokens.itertuples(index=False, name=None))
        unique_keys: List[Tuple[str, ...]] = sorted(set(key_tuples))
        code_of = {key: i for i, key in enumerate(unique_keys)}
        positions = matrix.unit_ids.get_indexer(tokens.index)
        codes = np.full(matrix.n_units, -1, dtype=np.int64)
        codes[positions] = [code_of[k] for k in key_tuples]

        aggregate_ids = [cfg.delimiter.join(key) for key in unique_keys]
        indicator = indicator_matrix(codes, len(unique_keys))
        values = aggregate_values(matrix.values, indicator, mode="sum")
        agg_matrix = ExpressionMatrix(values=values, gene_ids=matrix.gene_ids, unit_ids=aggregate_ids)

        grouped = pd.Series(np.asarray(matrix.unit_ids)).groupby(codes)
        members: Dict[str, Tuple[str, ...]] = {
            aggregate_ids[code]: tuple(ids) for code, ids in grouped if code >= 0
        }

        # first member supplies the original-typed key values
        first_rows = [table.loc[members[agg_id][0]] for agg_id in aggregate_ids]
        obs = pd.DataFrame(
            {col: [row[col] for row in first_rows] for col in key_fields},
            index=pd.Index(aggregate_ids, name="aggregate"),
        )
        for col in key_fields:
            if isinstance(table[col].dtype, pd.CategoricalDtype):
                obs[col] = pd.Categorical(obs[col], categories=table[col].cat.categories)
        obs["n_units"] = [len(members[a]) for a in aggregate_ids]

        result_warnings: List[str] = []
        n_replicates = tokens[cfg.replicate_col].nunique()
        if n_replicates < cfg.min_replicates:
            message = (
                f"Only {n_replicates} distinct values of '{cfg.replicate_col}' "
                f"(min_replicates={cfg.min_replicates}); network estimates may be unstable"
            )
            warnings.warn(message, LowReplicateWarning, stacklevel=2)
            self.logger.warning(message)
            result_warnings.append(message)

        elapsed = time.time() - start_time
        self.logger.info(
            "Built %d pseudobulk profiles from %d units (%d replicates) in %.2f sec",
            len(aggregate_ids),
            len(tokens),
            n_replicates,
            elapsed,
        )

        provenance = {
            "generated_at": datetime.now().isoformat(),
            "engine": type(self).__name__,
            "config": cfg.to_dict(),
            "input": {"n_genes": matrix.n_genes, "n_units": matrix.n_units},
            "summary": {
                "n_aggregates": len(aggregate_ids),
                "n_replicates": int(n_replicates),
                "n_units_excluded": int(sum(excluded.values())),
            },
        }

        return AggregationResult(
            kind="pseudobulk",
            matrix=agg_matrix,
            obs=obs,
            members=members,
            excluded=excluded,
            key_fields=list(key_fields),
            delimiter=cfg.delimiter,
            warnings=result_warnings,
            provenance=provenance,
            execution_time_seconds=elapsed,
        )

    def execute_anndata(self, adata: Any, layer: Optional[str] = None) -> AggregationResult:
        """Run on an AnnData (cells x genes) using ``obs`` as metadata."""
        matrix = ExpressionMatrix.from_anndata(adata, layer=layer)
        metadata = UnitMetadata.from_anndata(adata)
        return self.execute(matrix, metadata)


def construct_pseudobulk(
    matrix: ExpressionMatrix,
    metadata: UnitMetadata,
    config: Optional[PseudobulkConfig] = None,
    **overrides: Any,
) -> AggregationResult:
    """Functional form of ``PseudobulkEngine.execute``.

    >>> result = construct_pseudobulk(matrix, metadata, group_col="cell_type", min_replicates=20)
    """
    config = config or PseudobulkConfig()
    if overrides:
        config = replace(config, **overrides)
    return PseudobulkEngine(config).execute(matrix, metadata)
