"""Export functions for aggregation results.

Writes the aggregate x gene matrix, aggregate metadata, membership table,
provenance and summary for each run, and one matrix per label for splits.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Union

import pandas as pd

from ..core.matrix import AggregationResult
from ..core.stratify import SplitResult

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def _safe_name(label: str) -> str:
    return "".join(c if c.isalnum() or c in "-_." else "_" for c in str(label))


def export_membership(result: AggregationResult, output_path: PathLike) -> Path:
    """Write the long-format aggregate -> unit membership table."""
    output_path = Path(output_path)
    rows = [
        {"aggregate": agg_id, "unit": unit}
        for agg_id, units in result.members.items()
        for unit in units
    ]
    pd.DataFrame(rows, columns=["aggregate", "unit"]).to_csv(output_path, index=False)
    return output_path


def export_provenance(
    result: AggregationResult,
    output_path: PathLike,
    config_path: Optional[PathLike] = None,
) -> Path:
    """Export provenance information for audit trail.

    Parameters
    ----------
    result : AggregationResult
        Aggregation result
    output_path : PathLike
        Output file path
    config_path : PathLike, optional
        Config file used

    Returns
    -------
    Path
        Path to created file
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    provenance = {
        "export_timestamp": datetime.now().isoformat(),
        "config_path": str(config_path) if config_path else None,
        **result.provenance,
    }

    with open(output_path, "w") as f:
        json.dump(provenance, f, indent=2, default=str)

    return output_path


def export_result(
    result: AggregationResult,
    output_dir: PathLike,
    prefix: str = "",
    config_path: Optional[PathLike] = None,
) -> Dict[str, Path]:
    """Export all outputs of one aggregation run.

    Parameters
    ----------
    result : AggregationResult
        Aggregation result
    output_dir : PathLike
        Output directory
    prefix : str
        File name prefix (typically the run name)
    config_path : PathLike, optional
        Config file used

    Returns
    -------
    Dict[str, Path]
        Map of output type to file path
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    stem = f"{prefix}_" if prefix else ""

    outputs = {}
    outputs["matrix"] = output_dir / f"{stem}{result.kind}_matrix.csv"
    result.to_frame().to_csv(outputs["matrix"], index_label="aggregate")

    outputs["obs"] = output_dir / f"{stem}{result.kind}_obs.csv"
    result.obs.to_csv(outputs["obs"], index_label="aggregate")

    outputs["membership"] = export_membership(result, output_dir / f"{stem}membership.csv")
    outputs["provenance"] = export_provenance(result, output_dir / f"{stem}provenance.json", config_path)

    outputs["summary"] = output_dir / f"{stem}summary.json"
    with open(outputs["summary"], "w") as f:
        json.dump(result.summary_dict(), f, indent=2, default=str)

    logger.info(f"Exported {result.kind} result ({result.n_aggregates} aggregates) to {output_dir}")
    return outputs


def export_split(split: SplitResult, output_dir: PathLike, prefix: str = "") -> Dict[str, Path]:
    """Write one aggregate x gene CSV per label plus a JSON summary."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    stem = f"{prefix}_" if prefix else ""

    outputs = {}
    for label, frame in split.matrices.items():
        path = output_dir / f"{stem}{_safe_name(split.field)}_{_safe_name(label)}.csv"
        frame.to_csv(path, index_label="aggregate")
        outputs[f"matrix:{label}"] = path

    outputs["labels"] = output_dir / f"{stem}{_safe_name(split.field)}_labels.csv"
    split.labels.rename(split.field).to_csv(outputs["labels"], index_label="aggregate")

    outputs["summary"] = output_dir / f"{stem}split_summary.json"
    with open(outputs["summary"], "w") as f:
        json.dump(split.summary_dict(), f, indent=2, default=str)

    logger.info(f"Exported split by '{split.field}' ({len(split.matrices)} labels) to {output_dir}")
    return outputs


def export_all(store: Any, output_dir: PathLike) -> Dict[str, Dict[str, Path]]:
    """Export every run of an AnalysisStore into per-run subdirectories."""
    output_dir = Path(output_dir)
    outputs: Dict[str, Dict[str, Path]] = {}
    for name in store.list_runs():
        result = store.get_run(name)
        run_dir = output_dir / name
        if isinstance(result, SplitResult):
            outputs[name] = export_split(result, run_dir, prefix=name)
        else:
            outputs[name] = export_result(result, run_dir, prefix=name)
    return outputs
