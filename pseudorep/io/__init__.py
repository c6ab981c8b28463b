"""I/O utilities for pseudorep.

Provides logging, the run store, and CSV/JSON export.
"""

from .logging import get_logger, log_config, log_json, run_log_path
from .store import AnalysisStore
from .export import (
    export_all,
    export_membership,
    export_provenance,
    export_result,
    export_split,
)

__all__ = [
    # Logging
    "get_logger",
    "log_config",
    "log_json",
    "run_log_path",
    # Store
    "AnalysisStore",
    # Export
    "export_all",
    "export_membership",
    "export_provenance",
    "export_result",
    "export_split",
]
