"""Command-line interface for SampleWeave.

Provides commands to build the joint graph, propagate labels over it and
detect communities on it.
"""

import json
import logging
import sys
from pathlib import Path
from typing import Optional, Tuple

import click

from sample_weave import __version__


def setup_logging(verbose: bool = False, debug: bool = False) -> logging.Logger:
    """Setup console logging for CLI commands.

    The console handler has its own level, independent of the run log
    attached by :func:`_attach_run_log`.
    """
    level = logging.DEBUG if debug else (logging.INFO if verbose else logging.WARNING)
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
        handlers=[console_handler],
    )
    return logging.getLogger("sample_weave")


def _attach_run_log(ctx: click.Context, output_path: str, command: str) -> logging.Logger:
    """Write a timestamped run log for ``command`` next to its outputs."""
    from sample_weave.io import get_logger

    level = logging.DEBUG if ctx.obj["debug"] else logging.INFO
    logger, log_path = get_logger("sample_weave", Path(output_path) / f"{command}.log", level=level)
    ctx.obj["logger"] = logger
    ctx.obj["log_path"] = log_path
    logger.info("sample-weave %s %s", __version__, command)
    return logger


def _load_config(config: Optional[str], overrides: dict):
    from sample_weave.config import WeaveConfig

    if config:
        return WeaveConfig.from_yaml(config, overrides)
    return WeaveConfig.from_dict({k: v for k, v in overrides.items() if v is not None})


def _load_registry(manifest: Optional[str], inputs: Tuple[str, ...]):
    from sample_weave.io import load_manifest, load_samples

    if manifest:
        return load_manifest(manifest)
    if inputs:
        return load_samples(list(inputs))
    raise click.UsageError("Provide --manifest or at least one --input file")


def _fail(logger: logging.Logger, exc: Exception) -> None:
    logger.error("%s", exc)
    click.echo(f"Error: {exc}", err=True)
    sys.exit(1)


@click.group()
@click.version_option(version=__version__, prog_name="sample-weave")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.option("--debug", is_flag=True, help="Enable debug output")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, debug: bool) -> None:
    """SampleWeave: joint-graph integration of single-cell samples.

    Aligns every pair of samples, links cells by mutual nearest neighbors and
    assembles one joint graph for label transfer and joint clustering.

    Examples:

        # Build the joint graph of all samples in a manifest
        sample-weave build-graph --manifest samples.yaml --out weave/

        # Transfer labels from a partially annotated table
        sample-weave propagate --manifest samples.yaml --labels seeds.csv --out weave/

        # Leiden communities and their merge tree on a saved graph
        sample-weave communities --graph-dir weave/ --out weave/
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["debug"] = debug
    ctx.obj["logger"] = setup_logging(verbose, debug)


def _graph_options(func):
    """Options shared by commands that may build the graph."""
    options = [
        click.option("--manifest", "-m", type=click.Path(exists=True), help="YAML sample manifest"),
        click.option("--input", "-i", "inputs", multiple=True, type=click.Path(exists=True),
                     help="Sample .h5ad file (repeatable)"),
        click.option("--config", "-c", type=click.Path(exists=True),
                     help="Configuration file (YAML)"),
        click.option("--space", type=click.Choice(["PCA", "CPCA", "CCA", "Genes"], case_sensitive=False),
                     help="Comparison space"),
        click.option("-k", "k", type=int, help="Neighbors per cell for matching"),
        click.option("--n-workers", type=int, help="Threads for pairwise alignment"),
        click.option("--pair-timeout", type=float, help="Seconds allowed per pair"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _build(ctx, manifest, inputs, config, space, k, n_workers, pair_timeout, **extra):
    from sample_weave.core.integration import IntegrationEngine

    logger = ctx.obj["logger"]
    cfg = _load_config(
        config,
        {"space": space, "k": k, "n_workers": n_workers, "pair_timeout": pair_timeout, **extra},
    )
    registry = _load_registry(manifest, inputs)
    engine = IntegrationEngine(registry, cfg, logger=logger)
    return engine, engine.build_graph()


@cli.command("build-graph")
@_graph_options
@click.option("--balance-factor", help="Rebalance over this factor ('sample' or a sample metadata key)")
@click.option("--alignment-strength", type=float, help="Rebalancing strength in [0, 1]")
@click.option("--out", "-o", "output_path", required=True, type=click.Path(), help="Output directory")
@click.pass_context
def build_graph(
    ctx: click.Context,
    manifest: Optional[str],
    inputs: Tuple[str, ...],
    config: Optional[str],
    space: Optional[str],
    k: Optional[int],
    n_workers: Optional[int],
    pair_timeout: Optional[float],
    balance_factor: Optional[str],
    alignment_strength: Optional[float],
    output_path: str,
) -> None:
    """Align all sample pairs and assemble the joint graph."""
    from sample_weave.core.errors import SampleWeaveError
    from sample_weave.io import log_json, write_graph

    logger = _attach_run_log(ctx, output_path, "build_graph")
    try:
        engine, build = _build(
            ctx, manifest, inputs, config, space, k, n_workers, pair_timeout,
            balance_factor=balance_factor, alignment_strength=alignment_strength,
        )
    except SampleWeaveError as exc:
        _fail(logger, exc)
        return

    out_dir = Path(output_path)
    write_graph(build.graph, out_dir)
    engine.config.to_yaml(out_dir / "config_used.yaml")
    summary = build.summary_dict()
    with open(out_dir / "build_summary.json", "w") as f:
        json.dump(summary, f, indent=2, default=str)
    log_json(out_dir / "runs.jsonl", summary["graph"], event="build-graph")

    graph = summary["graph"]
    click.echo(
        f"Joint graph: {graph['n_nodes']} cells, {graph['n_edges']} edges, "
        f"{graph['n_components']} components "
        f"({build.report.n_succeeded}/{build.report.n_pairs} pairs aligned)"
    )


@cli.command()
@_graph_options
@click.option("--graph-dir", type=click.Path(exists=True), help="Use a graph written by build-graph")
@click.option("--labels", "-l", "labels_path", required=True, type=click.Path(exists=True),
              help="Seed label table (CSV/TSV)")
@click.option("--cell-column", default="cell_id", help="Cell id column of the label table")
@click.option("--label-column", default="label", help="Label column of the label table")
@click.option("--method", type=click.Choice(["diffusion", "solver"]), help="Propagation method")
@click.option("--max-iterations", type=int, help="Diffusion iteration cap")
@click.option("--out", "-o", "output_path", required=True, type=click.Path(), help="Output directory")
@click.pass_context
def propagate(
    ctx: click.Context,
    manifest: Optional[str],
    inputs: Tuple[str, ...],
    config: Optional[str],
    space: Optional[str],
    k: Optional[int],
    n_workers: Optional[int],
    pair_timeout: Optional[float],
    graph_dir: Optional[str],
    labels_path: str,
    cell_column: str,
    label_column: str,
    method: Optional[str],
    max_iterations: Optional[int],
    output_path: str,
) -> None:
    """Propagate seed labels over the joint graph."""
    from sample_weave.core.errors import SampleWeaveError
    from sample_weave.core.propagation import LabelPropagationEngine
    from sample_weave.io import log_json, read_graph, read_label_table, write_label_table

    logger = _attach_run_log(ctx, output_path, "propagate")
    try:
        seeds = read_label_table(labels_path, cell_column=cell_column, label_column=label_column)
        if graph_dir:
            cfg = _load_config(config, {"method": method, "max_iterations": max_iterations})
            graph = read_graph(graph_dir)
            result = LabelPropagationEngine(cfg.propagation, logger=logger).propagate(graph, seeds)
        else:
            engine, build = _build(
                ctx, manifest, inputs, config, space, k, n_workers, pair_timeout,
                method=method, max_iterations=max_iterations,
            )
            result = engine.propagate_labels(seeds, graph=build.graph)
    except SampleWeaveError as exc:
        _fail(logger, exc)
        return

    out_dir = Path(output_path)
    write_label_table(result.to_frame(), out_dir / "propagated_labels.csv")
    log_json(out_dir / "runs.jsonl", result.summary_dict(), event="propagate")
    click.echo(
        f"Propagated {len(result.labels)} labels to {len(result.distributions)} cells "
        f"({result.n_iterations} iterations, converged={result.converged})"
    )


@cli.command()
@_graph_options
@click.option("--graph-dir", type=click.Path(exists=True), help="Use a graph written by build-graph")
@click.option("--resolution", type=float, default=1.0, help="Leiden resolution")
@click.option("--seed", type=int, default=1337, help="Random seed")
@click.option("--layout", is_flag=True, help="Also compute a force-directed layout")
@click.option("--out", "-o", "output_path", required=True, type=click.Path(), help="Output directory")
@click.pass_context
def communities(
    ctx: click.Context,
    manifest: Optional[str],
    inputs: Tuple[str, ...],
    config: Optional[str],
    space: Optional[str],
    k: Optional[int],
    n_workers: Optional[int],
    pair_timeout: Optional[float],
    graph_dir: Optional[str],
    resolution: float,
    seed: int,
    layout: bool,
    output_path: str,
) -> None:
    """Detect Leiden communities on the joint graph and build their merge tree."""
    from sample_weave.core.errors import SampleWeaveError
    from sample_weave.core.graph import (
        ForceDirectedLayout,
        LeidenDetector,
        community_merge_tree,
        detect_communities,
        embed_graph,
    )
    from sample_weave.io import log_json, log_yaml, read_graph, write_dataframe

    logger = _attach_run_log(ctx, output_path, "communities")
    try:
        if graph_dir:
            graph = read_graph(graph_dir)
        else:
            _, build = _build(ctx, manifest, inputs, config, space, k, n_workers, pair_timeout)
            graph = build.graph
        partition = detect_communities(graph, LeidenDetector(resolution=resolution, random_seed=seed))
        tree = community_merge_tree(graph, partition)
        coords = embed_graph(graph, ForceDirectedLayout(random_seed=seed)) if layout else None
    except SampleWeaveError as exc:
        _fail(logger, exc)
        return

    out_dir = Path(output_path)
    frame = partition.to_frame()
    frame["sample_id"] = graph.node_samples
    write_dataframe(frame, out_dir / "communities.csv", index=True)
    log_yaml(out_dir / "merge_tree.yaml", tree.summary_dict())
    if coords is not None:
        write_dataframe(coords, out_dir / "layout.csv", index=True)
    log_json(
        out_dir / "runs.jsonl",
        {"n_communities": int(partition.nunique()), "resolution": resolution},
        event="communities",
    )
    click.echo(f"Detected {partition.nunique()} communities over {graph.n_nodes} cells")


def main() -> None:
    """Main entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
