"""Command-line interface for pseudorep.

Example Usage
-------------
    # From command line:
    pseudorep --help
    pseudorep metaspots --input visium.h5ad --out out/ --group-by region
    pseudorep pseudobulk --input snrna.h5ad --out out/ --label-col msex
    pseudorep split --input out/pseudobulk.h5ad --out split/ --field msex
    pseudorep run --config plan.yaml
"""

from .main import cli, main

__all__ = [
    "cli",
    "main",
]
