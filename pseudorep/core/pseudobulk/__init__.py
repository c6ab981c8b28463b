"""Pseudobulk aggregation by categorical metadata.

Sums cell-level counts per observed (group, replicate[, label])
combination, producing one pseudo-replicate profile per partition.

Example Usage
-------------
>>> from pseudorep.core.pseudobulk import construct_pseudobulk
>>> result = construct_pseudobulk(
...     matrix, metadata, group_col="cell_type", replicate_col="sample", label_col="msex",
... )
>>> result.to_frame()
"""

from .config import PseudobulkConfig
from .engine import PseudobulkEngine, construct_pseudobulk

__all__ = [
    "PseudobulkConfig",
    "PseudobulkEngine",
    "construct_pseudobulk",
]
