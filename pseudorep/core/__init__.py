"""Core computational modules for pseudorep.

This package contains the aggregation engines and shared types:
- matrix: ExpressionMatrix, UnitMetadata, AggregationResult
- metaspots: spatial neighborhood aggregation of spots
- pseudobulk: per (group, replicate[, label]) aggregation of cells
- stratify: splitting an aggregate matrix by a label
- normalization: aggregate normalization, gene selection, network hand-off
- errors: error taxonomy shared by all engines
"""
