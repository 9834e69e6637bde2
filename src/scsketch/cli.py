from __future__ import annotations
from typing import Optional, List
import typer
from pathlib import Path
import warnings

from . import io_utils
from .config import build_config
from .doublets import PrecomputedDoubletClassifier, ScrubletClassifier
from .metrics import MetricStore
from .outliers import compute_thresholds
from .pipeline import run_pipeline
import logging
from .logging_utils import init_logging, log_run_header


app = typer.Typer(help="scSketch CLI: multi-sample QC, leverage sketching and integration of scRNA-seq data.")

# Globally suppress noisy warnings
warnings.filterwarnings("ignore", message="Variable names are not unique", category=UserWarning, module="anndata")


@app.callback()
def main() -> None:
    """scSketch: QC, sketch, integrate and project many single-cell samples."""


def _expand_list(values: Optional[List[str]]) -> Optional[List[str]]:
    """Supports e.g. --qc-metrics a,b --qc-metrics c."""
    if values is None:
        return None
    out = []
    for v in values:
        out.extend(x.strip() for x in v.split(",") if x.strip())
    return out


# ======================================================================
#  run
# ======================================================================
@app.command("run", help="Full pipeline: QC -> filter -> normalize -> sketch -> integrate -> project.")
def run(
    # -------------------------------------------------------------
    # I/O
    # -------------------------------------------------------------
    input_dir: Path = typer.Option(
        ..., "--input-dir", "-i", exists=True, file_okay=False,
        help="[I/O] Directory with one <sample>.h5ad file per sample.",
    ),
    output_dir: Path = typer.Option(
        ..., "--out", "-o",
        help="[I/O] Output directory for tables and the run report.",
    ),
    pattern: str = typer.Option("*.h5ad", "--pattern", help="[I/O] Glob for sample files."),
    backed: bool = typer.Option(
        True, "--backed/--in-memory",
        help="[I/O] Keep count matrices on disk and stream them in row blocks.",
    ),
    merge_store: Optional[Path] = typer.Option(
        None, "--merge-store",
        help="[I/O] Write the merged counts to this zarr store instead of RAM.",
    ),
    n_jobs: int = typer.Option(4, "--n-jobs", help="Number of worker threads."),
    block_size: int = typer.Option(10_000, "--block-size", help="Rows per streamed block."),

    # -------------------------------------------------------------
    # QC
    # -------------------------------------------------------------
    qc_metrics: Optional[List[str]] = typer.Option(
        None, "--qc-metrics",
        help="[QC] Metrics to threshold (default: total_counts, n_genes_by_counts, pct_counts_mt).",
    ),
    outlier_k: float = typer.Option(3.0, "--outlier-k", help="[QC] MAD multiplier."),
    two_sided: bool = typer.Option(False, "--two-sided/--upper-only", help="[QC] Also enforce lower bounds."),
    degenerate_policy: str = typer.Option(
        "skip", "--degenerate-policy", help="[QC] Zero-MAD metrics: skip | raise",
    ),
    mt_prefix: str = typer.Option("MT-", "--mt-prefix", help="[QC] Mitochondrial gene prefix."),

    # -------------------------------------------------------------
    # Doublets
    # -------------------------------------------------------------
    doublet_mode: str = typer.Option(
        "rate", "--doublet-mode",
        help="Doublet thresholding on scrublet scores: fixed | rate",
    ),
    doublet_score_threshold: float = typer.Option(
        0.25, "--doublet-score-threshold", help="Used when --doublet-mode fixed",
    ),
    expected_doublet_rate: float = typer.Option(
        0.06, "--expected-doublet-rate", help="Used when --doublet-mode rate",
    ),
    doublet_calls: Optional[Path] = typer.Option(
        None, "--doublet-calls", exists=True, dir_okay=False,
        help="TSV with precomputed calls (sample_id, barcode, doublet_label, doublet_score); "
             "skips scrublet.",
    ),

    # -------------------------------------------------------------
    # Normalization / sketch / integration
    # -------------------------------------------------------------
    normalization: str = typer.Option(
        "scale_log", "--normalization", help="[Normalize] scale_log | pearson_residuals",
    ),
    n_top_features: int = typer.Option(2000, "--n-top-features", help="[Normalize] Ranked features kept."),
    feature_join: str = typer.Option(
        "intersection", "--feature-join", help="[Normalize] intersection | union",
    ),
    sketch_budget: int = typer.Option(5000, "--sketch-budget", help="[Sketch] Max sketch cells per sample."),
    sketch_rank: int = typer.Option(50, "--sketch-rank", help="[Sketch] Factorization rank."),
    mix_alpha: float = typer.Option(0.1, "--mix-alpha", help="[Sketch] Uniform mixing weight."),
    integration_dims: int = typer.Option(30, "--integration-dims", help="[Integration] Shared dimensions."),
    projection_method: str = typer.Option(
        "linear", "--projection-method", help="[Projection] linear | knn",
    ),
    seed: int = typer.Option(0, "--seed", help="Random seed."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging."),
):
    logfile = output_dir / "scsketch-run.log"
    init_logging(logfile, level=logging.DEBUG if verbose else logging.INFO)

    kwargs = dict(
        outlier_k=outlier_k,
        sketch_budget=sketch_budget,
        sketch_rank=sketch_rank,
        mix_alpha=mix_alpha,
        integration_dims=integration_dims,
        seed=seed,
        two_sided=two_sided,
        degenerate_policy=degenerate_policy,
        mt_prefix=mt_prefix,
        normalization=normalization,
        n_top_features=n_top_features,
        feature_join=feature_join,
        projection_method=projection_method,
        block_size=block_size,
        n_jobs=n_jobs,
        output_dir=output_dir,
        merge_store=merge_store,
        logfile=logfile,
    )
    # Only insert explicitly if user provided it
    metrics_list = _expand_list(qc_metrics)
    if metrics_list is not None:
        kwargs["qc_metrics"] = metrics_list

    cfg = build_config(**kwargs)
    log_run_header("run", cfg.model_dump())

    if doublet_calls is not None:
        classifier = PrecomputedDoubletClassifier(io_utils.read_doublet_calls(doublet_calls), by_barcode=True)
    else:
        classifier = ScrubletClassifier(
            doublet_mode=doublet_mode,
            doublet_score_threshold=doublet_score_threshold,
            expected_doublet_rate=expected_doublet_rate,
            random_state=seed,
        )

    samples = io_utils.load_samples(input_dir, pattern=pattern, backed=backed, n_jobs=n_jobs)
    result = run_pipeline(samples, cfg, doublet_classifier=classifier)
    io_utils.write_outputs(result, output_dir)


# ======================================================================
#  qc
# ======================================================================
@app.command("qc", help="QC metrics and MAD thresholds only.")
def qc(
    input_dir: Path = typer.Option(
        ..., "--input-dir", "-i", exists=True, file_okay=False,
        help="[I/O] Directory with one <sample>.h5ad file per sample.",
    ),
    output_dir: Path = typer.Option(..., "--out", "-o", help="[I/O] Output directory."),
    pattern: str = typer.Option("*.h5ad", "--pattern", help="[I/O] Glob for sample files."),
    qc_metrics: Optional[List[str]] = typer.Option(None, "--qc-metrics", help="[QC] Metrics to threshold."),
    outlier_k: float = typer.Option(3.0, "--outlier-k", help="[QC] MAD multiplier."),
    mt_prefix: str = typer.Option("MT-", "--mt-prefix", help="[QC] Mitochondrial gene prefix."),
    n_jobs: int = typer.Option(4, "--n-jobs", help="Number of worker threads."),
):
    logfile = output_dir / "scsketch-qc.log"
    init_logging(logfile)

    kwargs = dict(outlier_k=outlier_k, mt_prefix=mt_prefix, n_jobs=n_jobs, output_dir=output_dir, logfile=logfile)
    metrics_list = _expand_list(qc_metrics)
    if metrics_list is not None:
        kwargs["qc_metrics"] = metrics_list
    cfg = build_config(**kwargs)
    log_run_header("qc", cfg.model_dump())

    samples = io_utils.load_samples(input_dir, pattern=pattern, backed=True, n_jobs=n_jobs)
    store = MetricStore.from_samples(
        samples,
        mt_prefix=cfg.mt_prefix,
        ribo_prefixes=cfg.ribo_prefixes,
        hb_regex=cfg.hb_regex,
        block_size=cfg.block_size,
        n_jobs=cfg.n_jobs,
    )
    thresholds = compute_thresholds(store, cfg.qc_metrics, cfg.outlier_k, on_degenerate=cfg.degenerate_policy)

    output_dir.mkdir(parents=True, exist_ok=True)
    store.to_frame().to_csv(output_dir / "metrics.tsv", sep="\t", index=False)
    thresholds.to_frame().to_csv(output_dir / "thresholds.tsv", sep="\t", index=False, na_rep="NA")
    logging.getLogger(__name__).info("Wrote QC tables to %s", output_dir)


if __name__ == "__main__":
    app()
