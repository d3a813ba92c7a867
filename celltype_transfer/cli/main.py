"""Command-line interface for CellType-Transfer.

Provides CLI commands for marker selection, reference training and
classification of test datasets.
"""

import logging
import sys
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Optional, Tuple

import click

from celltype_transfer import __version__


def setup_logging(verbose: bool = False, debug: bool = False) -> logging.Logger:
    """Setup logging for CLI commands.

    Console handlers created here keep the console level even when a run
    log attached later lowers the package logger to INFO.
    """
    level = logging.DEBUG if debug else (logging.INFO if verbose else logging.WARNING)
    root = logging.getLogger()
    preconfigured = bool(root.handlers)
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
    )
    if not preconfigured:
        for handler in root.handlers:
            handler.setLevel(level)
    logger = logging.getLogger("celltype_transfer")
    if debug:
        logger.setLevel(logging.DEBUG)
    return logger


def _load_config(config: Optional[str], preset: Optional[str]):
    from celltype_transfer.config import TransferConfig

    if config:
        return TransferConfig.from_yaml(Path(config))
    if preset:
        try:
            return TransferConfig.preset(preset)
        except KeyError as e:
            raise click.BadParameter(str(e), param_hint="--preset") from e
    return TransferConfig()


def _start_run(
    logger: logging.Logger,
    out_dir: Path,
    command: str,
    cfg,
) -> Path:
    """Attach a timestamped file log and record the effective config."""
    from celltype_transfer.io import get_logger, log_yaml

    out_dir.mkdir(parents=True, exist_ok=True)
    _, log_path = get_logger(logger.name, out_dir / f"{command}.log")
    logger.info("celltype-transfer %s (version %s)", command, __version__)
    log_yaml(log_path, {"command": command, "config": cfg.to_dict()}, logger=logger)
    cfg_path = cfg.to_yaml(out_dir / "config.yaml")
    logger.info("Effective configuration written to %s", cfg_path)
    return log_path


def _load_reference_inputs(
    reference: str,
    labels: Optional[str],
    label_column: Optional[str],
    layer: Optional[str],
    samples_as_rows: bool,
    logger: logging.Logger,
):
    """Read the reference matrix and align labels to its samples."""
    from celltype_transfer.io import load_expression_matrix, load_labels

    matrix = load_expression_matrix(reference, layer=layer, samples_as_rows=samples_as_rows)
    labels_path = labels
    if labels_path is None:
        if Path(reference).suffix.lower() != ".h5ad":
            raise click.UsageError("--labels is required unless the reference is an .h5ad file")
        labels_path = reference
    ref_labels = load_labels(labels_path, column=label_column, samples=matrix.columns)
    n_missing = int(ref_labels.isna().sum())
    if n_missing:
        logger.warning("%d reference samples have no label in %s", n_missing, labels_path)
    return matrix, ref_labels


def _apply_overrides(
    cfg,
    method: Optional[str] = None,
    n_markers: Optional[int] = None,
    aggregate: Optional[bool] = None,
    seed: Optional[int] = None,
    n_workers: Optional[int] = None,
    quantile: Optional[float] = None,
    fine_tune: Optional[bool] = None,
    prune: Tuple[str, ...] = (),
):
    """Layer command-line options over the loaded configuration."""
    ref = cfg.reference
    cls = cfg.classification
    if method is not None:
        ref.markers = replace(ref.markers, method=method)
    if n_markers is not None:
        ref.markers = replace(ref.markers, n_markers=n_markers)
    if aggregate is not None:
        ref.aggregation = replace(ref.aggregation, enabled=aggregate)
    if seed is not None:
        ref.aggregation = replace(ref.aggregation, random_seed=seed)
    if n_workers is not None:
        ref.markers = replace(ref.markers, n_workers=n_workers)
        ref.aggregation = replace(ref.aggregation, n_workers=n_workers)
        cls.scoring = replace(cls.scoring, n_workers=n_workers)
    if quantile is not None:
        cls.scoring = replace(cls.scoring, quantile=quantile)
    if fine_tune is not None:
        cls.fine_tune = replace(cls.fine_tune, enabled=fine_tune)
    if prune:
        cls.pruning = replace(cls.pruning, modes=[m for m in prune if m != "none"])
    return cfg


def _fail(logger: logging.Logger, error: Exception) -> None:
    logger.error("%s", error)
    click.echo(f"Error: {error}", err=True)
    sys.exit(1)


@click.group()
@click.version_option(version=__version__, prog_name="celltype-transfer")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.option("--debug", is_flag=True, help="Enable debug output")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, debug: bool) -> None:
    """CellType-Transfer: reference-based cell-type annotation.

    Transfers labels from an annotated reference (bulk or single-cell) to
    unlabeled test samples by marker-restricted Spearman correlation,
    fine-tuning and pruning.

    Examples:

        # Select markers only
        celltype-transfer markers -r ref.csv -l ref_labels.csv -o markers/

        # Train once, classify many
        celltype-transfer train -r ref.h5ad --label-column cell_type -o model/
        celltype-transfer classify -t test.h5ad -m model/reference.joblib -o out/

        # Train and classify in one step
        celltype-transfer annotate -t test.csv -r ref.csv -l ref_labels.csv -o out/
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["debug"] = debug
    ctx.obj["logger"] = setup_logging(verbose, debug)


def reference_options(func):
    """Options shared by commands that read a labeled reference."""
    options = [
        click.option("--reference", "-r", "reference_path", required=True,
                     type=click.Path(exists=True),
                     help="Reference expression (CSV/TSV genes x samples, or .h5ad)"),
        click.option("--labels", "-l", "labels_path", type=click.Path(exists=True),
                     help="Reference labels table (defaults to the .h5ad obs)"),
        click.option("--label-column", default=None, help="Label column name"),
        click.option("--layer", default=None, help="AnnData layer to read"),
        click.option("--samples-as-rows", is_flag=True,
                     help="Tables are samples x genes instead of genes x samples"),
        click.option("--method", type=click.Choice(
            ["classic", "wilcoxon", "rank-sum", "t-test", "location-test"]),
            default=None, help="Marker statistic"),
        click.option("--n-markers", type=int, default=None,
                     help="Markers per pairwise comparison"),
        click.option("--restrict", type=click.Path(exists=True), default=None,
                     help="File with one gene per line to restrict the reference to"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def common_options(func):
    """Configuration and output options shared by all commands."""
    options = [
        click.option("--out", "-o", "output_path", required=True, type=click.Path(),
                     help="Output directory"),
        click.option("--config", "-c", type=click.Path(exists=True),
                     help="Configuration file (YAML)"),
        click.option("--preset", type=str, default=None,
                     help="Named configuration preset (default, bulk, single-cell)"),
        click.option("--n-workers", type=int, default=None, help="Parallel workers"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _read_gene_list(path: Optional[str]):
    if path is None:
        return None
    with open(path) as f:
        return [line.strip() for line in f if line.strip()]


@cli.command()
@reference_options
@common_options
@click.pass_context
def markers(
    ctx: click.Context,
    reference_path: str,
    labels_path: Optional[str],
    label_column: Optional[str],
    layer: Optional[str],
    samples_as_rows: bool,
    method: Optional[str],
    n_markers: Optional[int],
    restrict: Optional[str],
    output_path: str,
    config: Optional[str],
    preset: Optional[str],
    n_workers: Optional[int],
) -> None:
    """Select pairwise marker genes from a labeled reference.

    Writes markers.yaml (nested label -> label -> genes) and markers.csv
    (long table).
    """
    logger = ctx.obj["logger"]
    from celltype_transfer.core.errors import AnnotationError
    from celltype_transfer.core.reference import ReferenceBuilder
    from celltype_transfer.io import write_dataframe

    out_dir = Path(output_path)
    cfg = _apply_overrides(
        _load_config(config, preset), method=method, n_markers=n_markers, n_workers=n_workers
    )
    _start_run(logger, out_dir, "markers", cfg)

    try:
        matrix, ref_labels = _load_reference_inputs(
            reference_path, labels_path, label_column, layer, samples_as_rows, logger
        )
        reference = ReferenceBuilder(cfg.reference, logger=logger).build(
            matrix, ref_labels, restrict=_read_gene_list(restrict)
        )
    except AnnotationError as e:
        _fail(logger, e)

    import yaml

    with open(out_dir / "markers.yaml", "w") as f:
        yaml.safe_dump(reference.markers.to_dict(), f, sort_keys=False)
    write_dataframe(reference.markers.to_frame(), out_dir / "markers.csv")

    click.echo(
        f"Selected {reference.markers.n_genes} marker genes for "
        f"{len(reference.labels)} labels ({reference.markers.method})"
    )
    click.echo(f"Output saved to: {out_dir}")


@cli.command()
@reference_options
@common_options
@click.option("--markers", "-m", "markers_path", type=click.Path(exists=True),
              help="Precomputed markers (JSON/YAML); skips marker selection")
@click.option("--test", "-t", "test_path", type=click.Path(exists=True),
              help="Test data whose genes the reference is restricted to")
@click.option("--aggregate/--no-aggregate", default=None,
              help="Aggregate the reference into pseudo-bulk profiles")
@click.option("--seed", type=int, default=None, help="Random seed for aggregation")
@click.pass_context
def train(
    ctx: click.Context,
    reference_path: str,
    labels_path: Optional[str],
    label_column: Optional[str],
    layer: Optional[str],
    samples_as_rows: bool,
    method: Optional[str],
    n_markers: Optional[int],
    restrict: Optional[str],
    output_path: str,
    config: Optional[str],
    preset: Optional[str],
    n_workers: Optional[int],
    markers_path: Optional[str],
    test_path: Optional[str],
    aggregate: Optional[bool],
    seed: Optional[int],
) -> None:
    """Train a reference and save it for later classification.

    Writes reference.joblib, reference_summary.csv and markers.yaml.
    """
    logger = ctx.obj["logger"]
    from celltype_transfer.core.errors import AnnotationError
    from celltype_transfer.core.reference import ReferenceBuilder
    from celltype_transfer.io import (
        load_expression_matrix,
        load_marker_file,
        save_reference,
        write_dataframe,
    )

    out_dir = Path(output_path)
    cfg = _apply_overrides(
        _load_config(config, preset),
        method=method,
        n_markers=n_markers,
        aggregate=aggregate,
        seed=seed,
        n_workers=n_workers,
    )
    _start_run(logger, out_dir, "train", cfg)

    try:
        matrix, ref_labels = _load_reference_inputs(
            reference_path, labels_path, label_column, layer, samples_as_rows, logger
        )
        test_genes = None
        if test_path:
            test_genes = load_expression_matrix(
                test_path, samples_as_rows=samples_as_rows
            ).index
        marker_set = load_marker_file(markers_path) if markers_path else None
        reference = ReferenceBuilder(cfg.reference, logger=logger).build(
            matrix,
            ref_labels,
            markers=marker_set,
            test_genes=test_genes,
            restrict=_read_gene_list(restrict),
        )
    except AnnotationError as e:
        _fail(logger, e)

    import yaml

    model_path = save_reference(reference, out_dir / "reference.joblib")
    write_dataframe(reference.summary(), out_dir / "reference_summary.csv")
    with open(out_dir / "markers.yaml", "w") as f:
        yaml.safe_dump(reference.markers.to_dict(), f, sort_keys=False)

    click.echo(
        f"Reference trained: {len(reference.labels)} labels, "
        f"{len(reference.genes)} marker genes"
    )
    click.echo(f"Output saved to: {model_path}")


def _classify_and_write(
    ctx: click.Context,
    reference,
    test_path: str,
    test_layer: Optional[str],
    samples_as_rows: bool,
    cfg,
    out_dir: Path,
    command: str,
) -> None:
    """Classify a test dataset and write results plus a JSON run record."""
    logger = ctx.obj["logger"]
    from celltype_transfer.core.classification import ClassificationEngine
    from celltype_transfer.core.errors import AnnotationError
    from celltype_transfer.io import load_expression_matrix, log_json

    try:
        test = load_expression_matrix(test_path, layer=test_layer, samples_as_rows=samples_as_rows)
        result = ClassificationEngine(cfg.classification, logger=logger).classify(test, reference)
    except AnnotationError as e:
        _fail(logger, e)

    paths = result.write(out_dir)
    n_pruned = int(result.labels["pruned"].sum())
    log_json(out_dir / "runs.jsonl", {
        "timestamp": datetime.now().isoformat(timespec="seconds"),
        "command": command,
        "version": __version__,
        "test": str(test_path),
        "n_samples": result.n_samples,
        "n_pruned": n_pruned,
        "n_genes_used": len(result.genes_used),
        "excluded_labels": result.excluded_labels,
        "outputs": {k: str(v) for k, v in paths.items()},
    })

    click.echo(
        f"Classification complete: {result.n_samples} samples, "
        f"{result.n_samples - n_pruned} labeled, {n_pruned} pruned"
    )
    click.echo(f"Output saved to: {out_dir}")


def classification_options(func):
    """Options controlling scoring, fine-tuning and pruning."""
    options = [
        click.option("--quantile", type=float, default=None,
                     help="Correlation quantile used as the label score"),
        click.option("--fine-tune/--no-fine-tune", default=None,
                     help="Enable iterative fine-tuning"),
        click.option("--prune", multiple=True,
                     type=click.Choice(["outlier", "fixed", "margin", "none"]),
                     help="Pruning filter (repeatable)"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


@cli.command()
@click.option("--test", "-t", "test_path", required=True, type=click.Path(exists=True),
              help="Test expression (CSV/TSV genes x samples, or .h5ad)")
@click.option("--model", "-m", "model_path", required=True, type=click.Path(exists=True),
              help="Trained reference (reference.joblib)")
@click.option("--layer", default=None, help="AnnData layer to read from the test data")
@click.option("--samples-as-rows", is_flag=True,
              help="Test table is samples x genes instead of genes x samples")
@common_options
@classification_options
@click.pass_context
def classify(
    ctx: click.Context,
    test_path: str,
    model_path: str,
    layer: Optional[str],
    samples_as_rows: bool,
    output_path: str,
    config: Optional[str],
    preset: Optional[str],
    n_workers: Optional[int],
    quantile: Optional[float],
    fine_tune: Optional[bool],
    prune: Tuple[str, ...],
) -> None:
    """Classify test samples against a trained reference.

    Writes scores.csv, labels.csv, summary.csv and markers.yaml.
    """
    logger = ctx.obj["logger"]
    from celltype_transfer.io import load_reference

    out_dir = Path(output_path)
    cfg = _apply_overrides(
        _load_config(config, preset),
        n_workers=n_workers,
        quantile=quantile,
        fine_tune=fine_tune,
        prune=prune,
    )
    _start_run(logger, out_dir, "classify", cfg)

    reference = load_reference(model_path)
    logger.info("Loaded reference with %d labels from %s", len(reference.labels), model_path)
    _classify_and_write(ctx, reference, test_path, layer, samples_as_rows, cfg, out_dir, "classify")


@cli.command()
@click.option("--test", "-t", "test_path", required=True, type=click.Path(exists=True),
              help="Test expression (CSV/TSV genes x samples, or .h5ad)")
@click.option("--test-layer", default=None, help="AnnData layer to read from the test data")
@reference_options
@common_options
@classification_options
@click.option("--markers", "-m", "markers_path", type=click.Path(exists=True),
              help="Precomputed markers (JSON/YAML); skips marker selection")
@click.option("--aggregate/--no-aggregate", default=None,
              help="Aggregate the reference into pseudo-bulk profiles")
@click.option("--seed", type=int, default=None, help="Random seed for aggregation")
@click.option("--save-reference", is_flag=True, help="Also write reference.joblib")
@click.pass_context
def annotate(
    ctx: click.Context,
    test_path: str,
    test_layer: Optional[str],
    reference_path: str,
    labels_path: Optional[str],
    label_column: Optional[str],
    layer: Optional[str],
    samples_as_rows: bool,
    method: Optional[str],
    n_markers: Optional[int],
    restrict: Optional[str],
    output_path: str,
    config: Optional[str],
    preset: Optional[str],
    n_workers: Optional[int],
    quantile: Optional[float],
    fine_tune: Optional[bool],
    prune: Tuple[str, ...],
    markers_path: Optional[str],
    aggregate: Optional[bool],
    seed: Optional[int],
    save_reference: bool,
) -> None:
    """Train a reference restricted to the test genes and classify.

    Writes the classify outputs; with --save-reference also the trained
    reference.
    """
    logger = ctx.obj["logger"]
    from celltype_transfer.core.errors import AnnotationError
    from celltype_transfer.core.reference import ReferenceBuilder
    from celltype_transfer.io import load_expression_matrix, load_marker_file
    from celltype_transfer.io import save_reference as write_reference

    out_dir = Path(output_path)
    cfg = _apply_overrides(
        _load_config(config, preset),
        method=method,
        n_markers=n_markers,
        aggregate=aggregate,
        seed=seed,
        n_workers=n_workers,
        quantile=quantile,
        fine_tune=fine_tune,
        prune=prune,
    )
    _start_run(logger, out_dir, "annotate", cfg)

    try:
        matrix, ref_labels = _load_reference_inputs(
            reference_path, labels_path, label_column, layer, samples_as_rows, logger
        )
        test_genes = load_expression_matrix(
            test_path, layer=test_layer, samples_as_rows=samples_as_rows
        ).index
        marker_set = load_marker_file(markers_path) if markers_path else None
        reference = ReferenceBuilder(cfg.reference, logger=logger).build(
            matrix,
            ref_labels,
            markers=marker_set,
            test_genes=test_genes,
            restrict=_read_gene_list(restrict),
        )
    except AnnotationError as e:
        _fail(logger, e)

    if save_reference:
        write_reference(reference, out_dir / "reference.joblib")
    _classify_and_write(
        ctx, reference, test_path, test_layer, samples_as_rows, cfg, out_dir, "annotate"
    )


def main() -> None:
    """Main entry point for CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
