"""Aggregation plan orchestration.

Provides YAML-declared plans of named aggregation runs, dependency
resolution between runs, and in-memory execution against a run store.

Example Usage
-------------
>>> from pseudorep.pipeline import RunPlan, RunExecutor, PipelineLogger
>>> from pseudorep.io import AnalysisStore
>>> plan = RunPlan("plan.yaml")
>>> plan.load()
>>> plan.parse_runs()
>>> logger = PipelineLogger("logs/")
>>> logger.setup()
>>> executor = RunExecutor(plan, AnalysisStore(adata, layer=plan.layer), logger)
>>> results = executor.run()
"""

# Run representation
from .run import AGGREGATION_KINDS, RUN_KINDS, RunSpec

# Plan configuration
from .config import RunPlan

# Logging
from .logger import ColoredFormatter, PipelineLogger

# Execution
from .executor import RunExecutor, postprocess

__all__ = [
    # Run
    "AGGREGATION_KINDS",
    "RUN_KINDS",
    "RunSpec",
    # Plan
    "RunPlan",
    # Logging
    "ColoredFormatter",
    "PipelineLogger",
    # Execution
    "RunExecutor",
    "postprocess",
]
