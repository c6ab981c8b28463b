"""Spatial metaspot aggregation.

Collapses neighboring spots of a spatial transcriptomics section into
metaspots: spots are grouped by metadata fields, each group is split into
spatial neighborhoods, and member counts are summed.

Example Usage
-------------
>>> from pseudorep.core.metaspots import MetaspotEngine, MetaspotConfig
>>> config = MetaspotConfig(group_by=["region"], neighborhood_size=7)
>>> result = MetaspotEngine(config).execute_anndata(adata, layer="counts")
>>> result.to_frame()
"""

from .config import CoordinateConfig, MetaspotConfig
from .engine import MetaspotEngine, build_metaspots
from .neighborhoods import (
    canonical_order,
    kmeans_partition,
    knn_fixed_count,
    knn_partition,
    partition_group,
)

__all__ = [
    # Config
    "CoordinateConfig",
    "MetaspotConfig",
    # Engine
    "MetaspotEngine",
    "build_metaspots",
    # Neighborhoods
    "canonical_order",
    "kmeans_partition",
    "knn_fixed_count",
    "knn_partition",
    "partition_group",
]
