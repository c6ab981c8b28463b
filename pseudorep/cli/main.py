"""Command-line interface for pseudorep.

Provides CLI commands for building metaspots and pseudobulk profiles,
splitting aggregate matrices, and running aggregation plans.
"""

from dataclasses import replace
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import click

from pseudorep import __version__


def setup_logging(verbose: bool = False, debug: bool = False) -> logging.Logger:
    """Setup logging for CLI commands."""
    level = logging.DEBUG if debug else (logging.INFO if verbose else logging.WARNING)
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
    )
    return logging.getLogger("pseudorep")


def _command_logger(ctx: click.Context, out_dir: Path, command: str) -> logging.Logger:
    """File logger under out_dir/logs that also echoes to the console when verbose."""
    from pseudorep.io.logging import get_logger

    level = logging.DEBUG if ctx.obj.get("debug") else logging.INFO
    logger, log_path = get_logger(
        "pseudorep",
        out_dir / "logs",
        command,
        level=level,
        console=bool(ctx.obj.get("verbose") or ctx.obj.get("debug")),
    )
    logger.info(f"pseudorep {__version__} {command}; log file: {log_path}")
    return logger


def _overrides(**values: Any) -> Dict[str, Any]:
    """Drop options the user did not pass."""
    return {k: v for k, v in values.items() if v is not None and v != ()}


def _fail(error: Exception) -> None:
    click.echo(f"Error: {error}", err=True)
    sys.exit(1)


@click.group()
@click.version_option(version=__version__, prog_name="pseudorep")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.option("--debug", is_flag=True, help="Enable debug output")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, debug: bool) -> None:
    """pseudorep: pseudo-replicate builder for co-expression networks.

    Collapses cells or spatial spots into aggregate expression profiles
    (metaspots or pseudobulk) suitable for network construction.

    Examples:

        # Metaspots within each annotated region
        pseudorep metaspots -i visium.h5ad -o out/ --group-by region --size 7

        # Pseudobulk per cell type and sample, split by sex
        pseudorep pseudobulk -i snrna.h5ad -o out/ --label-col msex --split-by msex

        # Several runs declared in one plan
        pseudorep run --config plan.yaml
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["debug"] = debug
    ctx.obj["logger"] = setup_logging(verbose, debug)


@cli.command()
@click.option("--input", "-i", "input_path", required=True, type=click.Path(exists=True),
              help="Input AnnData file (.h5ad), spots x genes")
@click.option("--out", "-o", "output_path", required=True, type=click.Path(),
              help="Output directory")
@click.option("--config", "-c", type=click.Path(exists=True),
              help="Metaspot configuration file (YAML)")
@click.option("--layer", default=None, help="Raw count layer (default: X)")
@click.option("--group-by", "-g", multiple=True, help="Metadata column to group by (repeatable)")
@click.option("--groups", multiple=True, help="Group key to build (repeatable)")
@click.option("--size", "neighborhood_size", type=int, default=None, help="Spots per metaspot")
@click.option("--n-metaspots", type=int, default=None, help="Fixed metaspots per group")
@click.option("--method", type=click.Choice(["knn", "kmeans"]), default=None, help="Partition method")
@click.option("--mode", type=click.Choice(["sum", "mean"]), default=None, help="Aggregation mode")
@click.option("--space", type=click.Choice(["grid", "pixel"]), default=None, help="Coordinate space")
@click.option("--n-jobs", type=int, default=None, help="Parallel jobs over groups")
@click.option("--normalize", type=click.Choice(["none", "cpm", "log_cpm", "log_normalize"]),
              default=None, help="Normalize the aggregate matrix")
@click.option("--name", "run_name", default="metaspots", help="Run name used as file prefix")
@click.pass_context
def metaspots(
    ctx: click.Context,
    input_path: str,
    output_path: str,
    config: Optional[str],
    layer: Optional[str],
    group_by: Tuple[str, ...],
    groups: Tuple[str, ...],
    neighborhood_size: Optional[int],
    n_metaspots: Optional[int],
    method: Optional[str],
    mode: Optional[str],
    space: Optional[str],
    n_jobs: Optional[int],
    normalize: Optional[str],
    run_name: str,
) -> None:
    """Build spatial metaspots from a spot-level AnnData."""
    import scanpy as sc
    from pseudorep.core.errors import PseudorepError
    from pseudorep.core.metaspots import MetaspotConfig, MetaspotEngine
    from pseudorep.io.export import export_result
    from pseudorep.io.logging import log_config
    from pseudorep.pipeline import RunSpec, postprocess

    out_dir = Path(output_path)
    out_dir.mkdir(parents=True, exist_ok=True)
    logger = _command_logger(ctx, out_dir, "metaspots")

    cfg = MetaspotConfig.from_yaml(Path(config)) if config else MetaspotConfig()
    cfg = replace(
        cfg,
        **_overrides(
            group_by=list(group_by) or None,
            groups=list(groups) or None,
            neighborhood_size=neighborhood_size,
            n_metaspots=n_metaspots,
            method=method,
            mode=mode,
            n_jobs=n_jobs,
        ),
    )
    if space:
        cfg = replace(cfg, coordinates=replace(cfg.coordinates, space=space))
    log_config(logger, "Effective configuration", cfg.to_dict())

    logger.info("Loading AnnData...")
    adata = sc.read_h5ad(input_path)
    logger.info(f"Loaded {adata.n_obs} spots, {adata.n_vars} genes")

    try:
        result = MetaspotEngine(cfg, logger).execute_anndata(adata, layer=layer)
        result = postprocess(result, RunSpec(name=run_name, kind="metaspots", normalize=normalize))
    except PseudorepError as e:
        logger.error(str(e))
        _fail(e)

    outputs = export_result(result, out_dir, prefix=run_name, config_path=config)
    h5ad_path = out_dir / f"{run_name}.h5ad"
    result.to_anndata().write_h5ad(h5ad_path)

    click.echo(f"Metaspots complete: {result.n_aggregates} metaspots from {result.n_units_aggregated} spots")
    for message in result.warnings:
        click.echo(f"Warning: {message}", err=True)
    click.echo(f"Output saved to: {outputs['matrix']}")


@cli.command()
@click.option("--input", "-i", "input_path", required=True, type=click.Path(exists=True),
              help="Input AnnData file (.h5ad), cells x genes")
@click.option("--out", "-o", "output_path", required=True, type=click.Path(),
              help="Output directory")
@click.option("--config", "-c", type=click.Path(exists=True),
              help="Pseudobulk configuration file (YAML)")
@click.option("--layer", default=None, help="Raw count layer (default: X)")
@click.option("--group-col", default=None, help="Cell-type column")
@click.option("--replicate-col", default=None, help="Replicate column")
@click.option("--label-col", default=None, help="Optional label column")
@click.option("--min-replicates", type=int, default=None, help="Warn below this many replicates")
@click.option("--delimiter", default=None, help="Row id delimiter")
@click.option("--groups", multiple=True, help="Group value to build (repeatable)")
@click.option("--normalize", type=click.Choice(["none", "cpm", "log_cpm", "log_normalize"]),
              default=None, help="Normalize the aggregate matrix")
@click.option("--split-by", default=None, help="Also split the result by this field")
@click.option("--name", "run_name", default="pseudobulk", help="Run name used as file prefix")
@click.pass_context
def pseudobulk(
    ctx: click.Context,
    input_path: str,
    output_path: str,
    config: Optional[str],
    layer: Optional[str],
    group_col: Optional[str],
    replicate_col: Optional[str],
    label_col: Optional[str],
    min_replicates: Optional[int],
    delimiter: Optional[str],
    groups: Tuple[str, ...],
    normalize: Optional[str],
    split_by: Optional[str],
    run_name: str,
) -> None:
    """Build pseudobulk profiles per (group, replicate[, label])."""
    import scanpy as sc
    from pseudorep.core.errors import PseudorepError
    from pseudorep.core.pseudobulk import PseudobulkConfig, PseudobulkEngine
    from pseudorep.core.stratify import split_result
    from pseudorep.io.export import export_result, export_split
    from pseudorep.io.logging import log_config
    from pseudorep.pipeline import RunSpec, postprocess

    out_dir = Path(output_path)
    out_dir.mkdir(parents=True, exist_ok=True)
    logger = _command_logger(ctx, out_dir, "pseudobulk")

    cfg = PseudobulkConfig.from_yaml(Path(config)) if config else PseudobulkConfig()
    cfg = replace(
        cfg,
        **_overrides(
            group_col=group_col,
            replicate_col=replicate_col,
            label_col=label_col,
            min_replicates=min_replicates,
            delimiter=delimiter,
            groups=list(groups) or None,
        ),
    )
    log_config(logger, "Effective configuration", cfg.to_dict())

    logger.info("Loading AnnData...")
    adata = sc.read_h5ad(input_path)
    logger.info(f"Loaded {adata.n_obs} cells, {adata.n_vars} genes")

    try:
        result = PseudobulkEngine(cfg, logger).execute_anndata(adata, layer=layer)
        result = postprocess(result, RunSpec(name=run_name, kind="pseudobulk", normalize=normalize))
        split = split_result(result, split_by) if split_by else None
    except PseudorepError as e:
        logger.error(str(e))
        _fail(e)

    outputs = export_result(result, out_dir, prefix=run_name, config_path=config)
    result.to_anndata().write_h5ad(out_dir / f"{run_name}.h5ad")
    click.echo(f"Pseudobulk complete: {result.n_aggregates} profiles from {result.n_units_aggregated} cells")
    for message in result.warnings:
        click.echo(f"Warning: {message}", err=True)

    if split is not None:
        export_split(split, out_dir, prefix=run_name)
        sizes = ", ".join(f"{k}={v}" for k, v in split.sizes().items())
        click.echo(f"Split by {split_by}: {sizes}")
    click.echo(f"Output saved to: {outputs['matrix']}")


@cli.command()
@click.option("--input", "-i", "input_path", required=True, type=click.Path(exists=True),
              help="Aggregate x gene matrix (CSV, first column = row id) or aggregate .h5ad")
@click.option("--out", "-o", "output_path", required=True, type=click.Path(),
              help="Output directory")
@click.option("--field", "-f", required=True, help="Stratification field")
@click.option("--metadata", "metadata_path", type=click.Path(exists=True), default=None,
              help="Per-row metadata CSV (first column = row id)")
@click.option("--key-fields", default=None, help="Comma-separated names of row id tokens")
@click.option("--delimiter", default=":", help="Row id delimiter")
@click.option("--levels", default=None, help="Comma-separated declared levels, in output order")
@click.pass_context
def split(
    ctx: click.Context,
    input_path: str,
    output_path: str,
    field: str,
    metadata_path: Optional[str],
    key_fields: Optional[str],
    delimiter: str,
    levels: Optional[str],
) -> None:
    """Split an aggregate matrix by a label for consensus analysis."""
    import pandas as pd
    from pseudorep.core.errors import PseudorepError
    from pseudorep.core.stratify import StratifyConfig, split_by_label
    from pseudorep.io.export import export_split

    out_dir = Path(output_path)
    out_dir.mkdir(parents=True, exist_ok=True)
    logger = _command_logger(ctx, out_dir, "split")

    cfg = StratifyConfig(
        field=field,
        levels=levels.split(",") if levels else None,
        delimiter=delimiter,
    )

    metadata = None
    fields = key_fields.split(",") if key_fields else None
    if input_path.endswith(".h5ad"):
        import anndata as ad

        adata = ad.read_h5ad(input_path)
        frame = adata.to_df()
        metadata = adata.obs
        info = adata.uns.get("aggregation", {})
        if fields is None and "key_fields" in info:
            fields = list(info["key_fields"])
            delimiter = str(info.get("delimiter", delimiter))
    else:
        frame = pd.read_csv(input_path, index_col=0)
    if metadata_path:
        metadata = pd.read_csv(metadata_path, index_col=0)
    logger.info(f"Loaded {frame.shape[0]} rows x {frame.shape[1]} genes from {input_path}")

    try:
        cfg.validate()
        result = split_by_label(
            frame,
            cfg.field,
            key_fields=fields,
            metadata=metadata,
            levels=cfg.levels,
            delimiter=delimiter,
        )
    except PseudorepError as e:
        logger.error(str(e))
        _fail(e)

    export_split(result, out_dir)
    for label, size in result.sizes().items():
        click.echo(f"  {field}={label}: {size} rows")
    for label in result.empty_levels:
        click.echo(f"Warning: level '{label}' has no rows", err=True)


@cli.command()
@click.option("--config", "-c", required=True, type=click.Path(exists=True),
              help="Aggregation plan file (YAML)")
@click.option("--out", "-o", "output_path", type=click.Path(), default=None,
              help="Output directory (overrides global.output_dir)")
@click.option("--dry-run", is_flag=True, help="Show execution order without running")
@click.option("--save-store", is_flag=True, help="Also write every run as .h5ad plus a manifest")
@click.pass_context
def run(
    ctx: click.Context,
    config: str,
    output_path: Optional[str],
    dry_run: bool,
    save_store: bool,
) -> None:
    """Run an aggregation plan.

    Executes the plan's runs in dependency order against one input
    dataset, exporting each run and logging progress.
    """
    logger = ctx.obj["logger"]
    verbose = ctx.obj["verbose"]

    from pseudorep.core.errors import PseudorepError
    from pseudorep.io.store import AnalysisStore
    from pseudorep.pipeline import PipelineLogger, RunExecutor, RunPlan

    logger.info(f"Loading plan: {config}")
    plan = RunPlan(config)
    plan.load()
    plan.parse_runs()

    valid, errors = plan.validate_dependencies()
    if not valid:
        for error in errors:
            click.echo(f"Error: {error}", err=True)
        sys.exit(1)

    order = plan.get_execution_order()
    click.echo(f"Plan runs: {' -> '.join(order)}")
    if dry_run:
        click.echo("Dry run - no runs will be executed")
        for name in order:
            entry = plan.runs[name]
            source = f" <- {entry.source}" if entry.source else ""
            click.echo(f"  {name}: {entry.kind}{source}")
        return

    input_path = plan.input_path
    if not input_path:
        click.echo("Error: plan has no global.input", err=True)
        sys.exit(1)
    input_path = Path(input_path)
    if not input_path.is_absolute():
        input_path = Path(config).parent / input_path

    if output_path:
        out_dir = Path(output_path)
    else:
        out_dir = Path(plan.output_dir or "out")
        if not out_dir.is_absolute():
            out_dir = Path(config).parent / out_dir

    pipeline_logger = PipelineLogger(out_dir / "logs", log_level="DEBUG" if verbose else "INFO", console=verbose)
    pipeline_logger.setup()

    import scanpy as sc

    try:
        adata = sc.read_h5ad(input_path)
        store = AnalysisStore(adata, layer=plan.layer)
        executor = RunExecutor(plan, store, pipeline_logger, output_dir=out_dir)
        executor.run()
        if save_store:
            store.save(out_dir / "store")
    except PseudorepError as e:
        _fail(e)
    finally:
        pipeline_logger.close()

    click.echo(f"Plan completed: {len(executor.completed_runs)} runs")
    click.echo(f"Output saved to: {out_dir}")


def main() -> None:
    """Main entry point for CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
