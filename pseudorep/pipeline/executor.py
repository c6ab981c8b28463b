"""In-memory execution of aggregation plans against a run store."""

from dataclasses import replace
from pathlib import Path
import time
from typing import Callable, Dict, List, Optional

from ..core.matrix import AggregationResult, UnitMetadata
from ..core.metaspots import MetaspotEngine
from ..core.normalization import normalize_aggregates, select_genes
from ..core.pseudobulk import PseudobulkEngine
from ..core.stratify import split_result
from ..io.export import export_result, export_split
from ..io.logging import log_json
from ..io.store import AnalysisStore, RunResult
from .config import RunPlan
from .logger import PipelineLogger
from .run import RunSpec


def postprocess(result: AggregationResult, run: RunSpec) -> AggregationResult:
    """Apply the run's gene selection and normalization to an aggregate matrix."""
    matrix = result.matrix
    provenance = dict(result.provenance)

    if run.genes is not None:
        options = dict(run.genes)
        genes = select_genes(
            matrix,
            method=options.get("method", "fraction"),
            fraction=options.get("fraction", 0.05),
            metadata=UnitMetadata(table=result.obs) if options.get("group_by") else None,
            group_by=options.get("group_by"),
            genes=options.get("genes"),
        )
        matrix = matrix.subset_genes(genes)
        provenance["gene_selection"] = {**options, "n_selected": len(genes)}

    if run.normalize is not None:
        matrix = normalize_aggregates(matrix, method=run.normalize)
        provenance["normalization"] = run.normalize

    if matrix is result.matrix:
        return result
    return replace(result, matrix=matrix, provenance=provenance)


class RunExecutor:
    """Execute the runs of a plan in dependency order, in memory.

    Each run's result is stored in the AnalysisStore under its run name.
    Split runs read their source run's result from the store.

    Parameters
    ----------
    plan : RunPlan
        Parsed plan
    store : AnalysisStore
        Store holding the source dataset
    logger : PipelineLogger, optional
        Logger instance
    output_dir : str or Path, optional
        Where exports and the run log go; defaults to the plan's output_dir

    Example
    -------
    >>> plan = RunPlan("plan.yaml"); plan.load(); plan.parse_runs()
    >>> executor = RunExecutor(plan, AnalysisStore(adata, layer="counts"))
    >>> results = executor.run()
    """

    def __init__(
        self,
        plan: RunPlan,
        store: AnalysisStore,
        logger: Optional[PipelineLogger] = None,
        output_dir=None,
    ):
        self.plan = plan
        self.store = store
        self.logger = logger
        output_dir = output_dir if output_dir is not None else plan.output_dir
        self.output_dir = Path(output_dir) if output_dir else None
        self.completed_runs: List[str] = []
        self._handlers: Dict[str, Callable[[RunSpec, Dict[str, RunResult]], RunResult]] = {
            "metaspots": self._run_metaspots,
            "pseudobulk": self._run_pseudobulk,
            "split": self._run_split,
        }

    def _run_metaspots(self, run: RunSpec, results: Dict[str, RunResult]) -> RunResult:
        engine = MetaspotEngine(run.build_config())
        result = engine.execute(self.store.expression(), self.store.metadata())
        return postprocess(result, run)

    def _run_pseudobulk(self, run: RunSpec, results: Dict[str, RunResult]) -> RunResult:
        engine = PseudobulkEngine(run.build_config())
        result = engine.execute(self.store.expression(), self.store.metadata())
        return postprocess(result, run)

    def _run_split(self, run: RunSpec, results: Dict[str, RunResult]) -> RunResult:
        config = run.build_config()
        config.validate()
        source = results.get(run.source) or self.store.get_run(run.source)
        return split_result(source, config.field, levels=config.levels)

    def run(self, overwrite: bool = False) -> Dict[str, RunResult]:
        """Execute all runs in order.

        Parameters
        ----------
        overwrite : bool
            Replace runs already present in the store

        Returns
        -------
        Dict[str, RunResult]
            Map of run name to result
        """
        self.plan.validate()
        order = self.plan.get_execution_order()
        results: Dict[str, RunResult] = {}

        if self.logger:
            self.logger.log_info(f"Executing plan '{self.plan.name}': {', '.join(order)}")

        for name in order:
            run = self.plan.runs[name]
            if self.logger:
                self.logger.log_run_start(name, run.kind)

            start_time = time.time()
            try:
                result = self._handlers[run.kind](run, results)
            except Exception as e:
                if self.logger:
                    self.logger.log_run_error(name, str(e))
                raise

            results[name] = result
            self.store.add_run(name, result, overwrite=overwrite)
            self.completed_runs.append(name)
            duration = time.time() - start_time
            summary = result.summary_dict()

            if self.logger:
                for message in getattr(result, "warnings", []):
                    self.logger.log_warning(f"[{name}] {message}")
                self.logger.log_run_complete(name, duration, summary)

            if self.output_dir is not None:
                if run.export:
                    self._export(name, result)
                log_json(
                    self.output_dir / "runs.jsonl",
                    {"run": name, "kind": run.kind, "duration_seconds": round(duration, 3), **summary},
                )

        return results

    def _export(self, name: str, result: RunResult) -> Dict[str, Path]:
        run_dir = self.output_dir / name
        if isinstance(result, AggregationResult):
            return export_result(result, run_dir, prefix=name)
        return export_split(result, run_dir, prefix=name)
