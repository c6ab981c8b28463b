"""Test fixtures for pseudorep.

Provides mock data generators and test utilities.
"""

from .mock_adata import (
    create_count_frame,
    create_paired_units,
    create_snrna_adata,
    create_spatial_adata,
)

__all__ = [
    "create_count_frame",
    "create_paired_units",
    "create_snrna_adata",
    "create_spatial_adata",
]
