"""pseudorep: pseudo-replicate builder for co-expression network analysis.

This package provides tools for:
- Spatial metaspots: merging neighboring spots within metadata groups
- Pseudobulk: summing cell counts per cell type and biological replicate
- Stratification: splitting aggregate matrices by a label for consensus networks
- Normalization and gene selection before network construction

Aggregation parameters are explicit configuration dataclasses that can be
loaded from YAML, so several aggregation runs can be declared in one plan.

Example usage:
    >>> import scanpy as sc
    >>> from pseudorep.core.pseudobulk import PseudobulkEngine, PseudobulkConfig
    >>> from pseudorep.core.stratify import split_result
    >>>
    >>> adata = sc.read_h5ad("snrna.h5ad")
    >>> config = PseudobulkConfig(group_col="cell_type", replicate_col="sample", label_col="msex")
    >>> result = PseudobulkEngine(config).execute_anndata(adata, layer="counts")
    >>> split = split_result(result, "msex")
"""

__version__ = "0.1.0"
