"""Keyed store of aggregation runs on one source dataset.

Several aggregation configurations (e.g. metaspots per region and
pseudobulk per sex) are kept side by side under user-chosen run names,
with one run marked active. A JSON-safe summary of every run is mirrored
into ``adata.uns["pseudorep"]`` so the source object records what was
derived from it.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import pandas as pd

from ..core.errors import ConfigurationError, RunExistsError, UnknownRunError
from ..core.matrix import AggregationResult, ExpressionMatrix, UnitMetadata
from ..core.stratify import SplitResult

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]
RunResult = Union[AggregationResult, SplitResult]

UNS_KEY = "pseudorep"
MANIFEST_NAME = "manifest.json"
MANIFEST_VERSION = 1


class AnalysisStore:
    """Source AnnData plus named aggregation runs.

    Parameters
    ----------
    adata : AnnData
        Source units x genes object; ``obs`` holds unit metadata
    layer : str, optional
        Layer holding raw counts; None reads ``X``

    Example
    -------
    >>> store = AnalysisStore(adata, layer="counts")
    >>> result = MetaspotEngine(config).execute(store.expression(), store.metadata())
    >>> store.add_run("region_metaspots", result)
    >>> store.set_active("region_metaspots")
    """

    def __init__(self, adata: Any, layer: Optional[str] = None):
        if layer is not None and layer not in adata.layers:
            raise ConfigurationError(
                f"Layer '{layer}' not found in AnnData",
                expected=layer,
                found=list(adata.layers.keys()),
            )
        self.adata = adata
        self.layer = layer
        self._runs: Dict[str, RunResult] = {}
        self._active: Optional[str] = None
        self._expression: Optional[ExpressionMatrix] = None

    # ------------------------------------------------------------------
    # Source data
    # ------------------------------------------------------------------

    def expression(self) -> ExpressionMatrix:
        """Genes x units matrix of the source layer (cached)."""
        if self._expression is None:
            self._expression = ExpressionMatrix.from_anndata(self.adata, layer=self.layer)
        return self._expression

    def metadata(self) -> UnitMetadata:
        return UnitMetadata.from_anndata(self.adata)

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def add_run(self, name: str, result: RunResult, overwrite: bool = False) -> None:
        """Store ``result`` under ``name``.

        Raises
        ------
        RunExistsError
            If ``name`` is taken and ``overwrite`` is False
        """
        if name in self._runs and not overwrite:
            raise RunExistsError(
                f"Run '{name}' already exists",
                found=name,
                suggestion="Pass overwrite=True or choose another run name",
            )
        self._runs[name] = result
        if self._active is None:
            self._active = name
        self._mirror()
        logger.info(f"Stored run '{name}' ({_run_kind(result)})")

    def get_run(self, name: str) -> RunResult:
        """Return the run stored under ``name``.

        Raises
        ------
        UnknownRunError
            If no such run exists
        """
        if name not in self._runs:
            raise UnknownRunError(
                f"Unknown run '{name}'",
                expected=self.list_runs(),
                found=name,
            )
        return self._runs[name]

    def remove_run(self, name: str) -> None:
        self.get_run(name)
        del self._runs[name]
        if self._active == name:
            self._active = next(iter(self._runs), None)
        self._mirror()

    def list_runs(self) -> List[str]:
        return list(self._runs)

    def __contains__(self, name: str) -> bool:
        return name in self._runs

    def __len__(self) -> int:
        return len(self._runs)

    def set_active(self, name: str) -> None:
        self.get_run(name)
        self._active = name
        self._mirror()

    @property
    def active_name(self) -> Optional[str]:
        return self._active

    @property
    def active_run(self) -> Optional[RunResult]:
        return self._runs.get(self._active) if self._active else None

    def _mirror(self) -> None:
        self.adata.uns[UNS_KEY] = {
            "active": self._active or "",
            "runs": {name: _summary(result) for name, result in self._runs.items()},
        }

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self, out_dir: PathLike) -> Path:
        """Write one file set per run plus a manifest.

        Aggregation runs are written as ``<name>.h5ad`` (aggregates x
        genes). Split runs are written as one CSV per label plus a label
        table.

        Returns
        -------
        Path
            Manifest path
        """
        out_dir = Path(out_dir)
        out_dir.mkdir(parents=True, exist_ok=True)
        manifest: Dict[str, Any] = {
            "version": MANIFEST_VERSION,
            "layer": self.layer,
            "active": self._active,
            "runs": {},
        }

        for name, result in self._runs.items():
            if isinstance(result, AggregationResult):
                path = out_dir / f"{name}.h5ad"
                _aggregation_to_anndata(result).write_h5ad(path)
                manifest["runs"][name] = {"kind": result.kind, "files": [path.name]}
            else:
                files = []
                labels_path = out_dir / f"{name}.labels.csv"
                result.labels.rename("label").to_csv(labels_path, index_label="aggregate")
                files.append(labels_path.name)
                matrices = {}
                for i, (label, frame) in enumerate(result.matrices.items()):
                    path = out_dir / f"{name}.{i}.csv"
                    frame.to_csv(path, index_label="aggregate")
                    matrices[label] = path.name
                    files.append(path.name)
                manifest["runs"][name] = {
                    "kind": "split",
                    "files": files,
                    "field": result.field,
                    "resolved_from": result.resolved_from,
                    "matrices": matrices,
                    "empty_levels": list(result.empty_levels),
                }

        manifest_path = out_dir / MANIFEST_NAME
        with open(manifest_path, "w") as f:
            json.dump(manifest, f, indent=2, default=str)
        logger.info(f"Saved {len(self._runs)} runs to {out_dir}")
        return manifest_path

    @classmethod
    def load(cls, out_dir: PathLike, adata: Any, layer: Optional[str] = None) -> "AnalysisStore":
        """Restore a store written by ``save`` on top of ``adata``."""
        import anndata as ad

        out_dir = Path(out_dir)
        with open(out_dir / MANIFEST_NAME) as f:
            manifest = json.load(f)

        store = cls(adata, layer=layer if layer is not None else manifest.get("layer"))
        for name, entry in manifest.get("runs", {}).items():
            if entry["kind"] == "split":
                labels = pd.read_csv(out_dir / f"{name}.labels.csv", index_col=0, dtype=str)["label"]
                matrices = {}
                for label, filename in entry["matrices"].items():
                    frame = pd.read_csv(out_dir / filename, index_col=0)
                    frame.index = frame.index.astype(str)
                    matrices[label] = frame
                result: RunResult = SplitResult(
                    field=entry["field"],
                    matrices=matrices,
                    labels=labels,
                    empty_levels=entry.get("empty_levels", []),
                    resolved_from=entry.get("resolved_from", ""),
                )
            else:
                result = _aggregation_from_anndata(ad.read_h5ad(out_dir / entry["files"][0]))
            store._runs[name] = result

        if manifest.get("active") in store._runs:
            store._active = manifest["active"]
        elif store._runs:
            store._active = next(iter(store._runs))
        store._mirror()
        logger.info(f"Loaded {len(store)} runs from {out_dir}")
        return store


def _run_kind(result: RunResult) -> str:
    return result.kind if isinstance(result, AggregationResult) else "split"


def _summary(result: RunResult) -> Dict[str, Any]:
    summary = result.summary_dict()
    summary.setdefault("kind", _run_kind(result))
    return json.loads(json.dumps(summary, default=str))


def _aggregation_to_anndata(result: AggregationResult):
    adata = result.to_anndata()
    adata.uns["members"] = pd.DataFrame(
        [(agg, unit) for agg, units in result.members.items() for unit in units],
        columns=["aggregate", "unit"],
    )
    adata.uns["pseudorep_run"] = json.dumps(
        {
            "kind": result.kind,
            "key_fields": list(result.key_fields),
            "delimiter": result.delimiter,
            "excluded": result.excluded,
            "warnings": list(result.warnings),
            "provenance": result.provenance,
            "execution_time_seconds": result.execution_time_seconds,
        },
        default=str,
    )
    return adata


def _aggregation_from_anndata(adata) -> AggregationResult:
    meta = json.loads(adata.uns["pseudorep_run"])
    members_df = adata.uns.get("members")
    members: Dict[str, tuple] = {str(a): () for a in adata.obs_names}
    if members_df is not None and len(members_df):
        for agg, units in members_df.groupby("aggregate", sort=False)["unit"]:
            members[str(agg)] = tuple(str(u) for u in units)
    return AggregationResult(
        kind=meta["kind"],
        matrix=ExpressionMatrix.from_anndata(adata),
        obs=adata.obs.copy(),
        members=members,
        excluded={str(k): int(v) for k, v in meta.get("excluded", {}).items()},
        key_fields=list(meta.get("key_fields", [])),
        delimiter=meta.get("delimiter", ":"),
        warnings=list(meta.get("warnings", [])),
        provenance=meta.get("provenance", {}),
        execution_time_seconds=float(meta.get("execution_time_seconds", 0.0)),
    )
