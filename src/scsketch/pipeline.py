# src/scsketch/pipeline.py

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Mapping, Optional, Tuple, Union

import pandas as pd
from joblib import Parallel, delayed

from scsketch import __version__
from .config import PipelineConfig
from .doublets import DoubletClassifier, ScrubletClassifier, validate_calls
from .errors import PipelineError, SampleFailure
from .filtering import MergedDataset, filter_samples
from .integration import SharedEmbedding, integrate
from .metrics import MetricStore
from .normalization import NormalizationStrategy, NormalizedAssay, NormalizedAssayBuilder, make_normalizer
from .outliers import ThresholdTable, compute_thresholds
from .projection import FullEmbedding, project
from .samples import Sample, SampleInput, as_sample_map
from .sketch import LeverageSketchSampler, Sketch

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class PipelineResult:
    config: PipelineConfig
    metrics: MetricStore
    thresholds: ThresholdTable
    doublet_calls: Dict[str, pd.DataFrame]
    merged: MergedDataset
    assay: NormalizedAssay
    sketches: Dict[str, Sketch]
    shared: SharedEmbedding
    embedding: FullEmbedding
    failures: List[SampleFailure] = field(default_factory=list)
    report: dict = field(default_factory=dict)

    @property
    def failed_samples(self) -> List[str]:
        return [f.sample_id for f in self.failures]


# ---------------------------------------------------------------------
# Doublet stage
# ---------------------------------------------------------------------
def _classify_one(classifier: DoubletClassifier, sample: Sample) -> Union[pd.DataFrame, SampleFailure]:
    try:
        return validate_calls(classifier.classify(sample), sample)
    except SampleFailure as failure:
        return failure
    except Exception as e:
        return SampleFailure(sample.sample_id, "doublets", f"{type(e).__name__}: {e}")


def classify_doublets(
    samples: Mapping[str, Sample],
    classifier: DoubletClassifier,
    n_jobs: int = 1,
) -> Tuple[Dict[str, pd.DataFrame], List[SampleFailure]]:
    """Run the doublet classifier on every sample; one failing sample does not stop the rest."""
    sample_ids = list(samples)
    LOGGER.info(
        "[Doublets] Classifying %d samples with %s (n_jobs=%d)",
        len(sample_ids),
        type(classifier).__name__,
        n_jobs,
    )
    results = Parallel(n_jobs=n_jobs, prefer="threads")(
        delayed(_classify_one)(classifier, samples[sid]) for sid in sample_ids
    )

    calls: Dict[str, pd.DataFrame] = {}
    failures: List[SampleFailure] = []
    for sid, res in zip(sample_ids, results):
        if isinstance(res, SampleFailure):
            LOGGER.error("%s", res)
            failures.append(res)
        else:
            calls[sid] = res
    return calls, failures


# ---------------------------------------------------------------------
# Run report
# ---------------------------------------------------------------------
def build_report(
    cfg: PipelineConfig,
    samples: Mapping[str, Sample],
    thresholds: ThresholdTable,
    merged: MergedDataset,
    assay: NormalizedAssay,
    sketches: Mapping[str, Sketch],
    shared: SharedEmbedding,
    embedding: FullEmbedding,
    failures: List[SampleFailure],
) -> dict:
    return {
        "version": __version__,
        "timestamp_utc": datetime.now(timezone.utc).isoformat(),
        "config": cfg.model_dump(mode="json"),
        "samples": {
            "input": sorted(samples),
            "integrated": sorted(shared.transforms),
            "failed": [f.to_dict() for f in failures],
        },
        "degenerate_metrics": [
            {"sample_id": t.sample_id, "metric": t.metric} for t in thresholds.degenerate
        ],
        "cells": {
            "input": {sid: s.n_cells for sid, s in samples.items()},
            "kept": merged.cells_per_sample(),
            "sketch": {sid: sk.size for sid, sk in sketches.items()},
            "embedded": embedding.n_cells,
        },
        "normalization": {
            "method": assay.method,
            "n_features": assay.n_features,
            "feature_join": cfg.feature_join,
        },
        "integration": {
            "reference": shared.reference,
            "merge_order": list(shared.merge_order),
            "n_dims": shared.n_dims,
            "n_anchors": dict(shared.n_anchors),
        },
        "projection": {"method": cfg.projection_method},
    }


# ---------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------
def run_pipeline(
    samples: SampleInput,
    cfg: Optional[PipelineConfig] = None,
    *,
    doublet_classifier: Optional[DoubletClassifier] = None,
    normalizer: Optional[NormalizationStrategy] = None,
) -> PipelineResult:
    """
    QC thresholds -> filtering -> normalization -> sketching -> integration
    -> projection, for a set of samples.

    Per-sample failures (doublet classification, empty after filtering,
    sketching) exclude the sample and are listed in the result; the run only
    aborts with PipelineError when no sample is left.
    """
    cfg = cfg or PipelineConfig()
    sample_map = as_sample_map(samples)
    failures: List[SampleFailure] = []

    LOGGER.info("Starting scSketch pipeline on %d samples", len(sample_map))

    # ----------------------------
    # QC metrics + thresholds
    # ----------------------------
    metrics = MetricStore.from_samples(
        sample_map,
        mt_prefix=cfg.mt_prefix,
        ribo_prefixes=cfg.ribo_prefixes,
        hb_regex=cfg.hb_regex,
        block_size=cfg.block_size,
        n_jobs=cfg.n_jobs,
    )
    thresholds = compute_thresholds(
        metrics,
        cfg.qc_metrics,
        cfg.outlier_k,
        on_degenerate=cfg.degenerate_policy,
    )

    # ----------------------------
    # Doublets
    # ----------------------------
    classifier = doublet_classifier or ScrubletClassifier(random_state=cfg.seed)
    doublet_calls, doublet_failures = classify_doublets(sample_map, classifier, n_jobs=cfg.n_jobs)
    failures.extend(doublet_failures)

    # ----------------------------
    # Filter + merge
    # ----------------------------
    merged = filter_samples(
        sample_map,
        doublet_calls,
        thresholds,
        metrics,
        two_sided=cfg.two_sided,
        feature_join=cfg.feature_join,
        block_size=cfg.block_size,
        merge_store=cfg.merge_store,
    )
    failures.extend(merged.failures)
    if not merged.sample_ranges:
        raise PipelineError("filter", "no sample has any cell left after QC and doublet filtering")
    if len(merged.feature_names) == 0:
        raise PipelineError("filter", f"feature_join={cfg.feature_join!r} left no shared features")

    # ----------------------------
    # Normalization
    # ----------------------------
    strategy = normalizer or make_normalizer(cfg.normalization, target_sum=cfg.target_sum, theta=cfg.theta)
    assay = NormalizedAssayBuilder(strategy, cfg.n_top_features, block_size=cfg.block_size).build(merged)

    # ----------------------------
    # Sketching
    # ----------------------------
    sampler = LeverageSketchSampler(
        budget=cfg.sketch_budget,
        rank=cfg.sketch_rank,
        mix_alpha=cfg.mix_alpha,
        seed=cfg.seed,
        oversample=cfg.oversample,
        max_iter=cfg.max_iter,
        tol=cfg.svd_tol,
        time_budget=cfg.time_budget,
        block_size=cfg.block_size,
        n_jobs=cfg.n_jobs,
    )
    sketches, sketch_failures = sampler.sample_all(assay.matrix, merged.sample_ranges)
    failures.extend(sketch_failures)
    if not sketches:
        raise PipelineError("sketch", "every sample failed to sketch")
    merged = merged.exclude(sketch_failures)

    # ----------------------------
    # Integration + projection
    # ----------------------------
    sketch_rows = {
        sid: assay.matrix.take_rows(sk.indices, cfg.block_size) for sid, sk in sketches.items()
    }
    shared = integrate(
        sketch_rows,
        sketches,
        n_dims=cfg.integration_dims,
        anchor_k=cfg.anchor_k,
        min_anchors=cfg.min_anchors,
        ridge_alpha=cfg.ridge_alpha,
    )
    embedding = project(
        shared,
        assay.matrix,
        merged.sample_ranges,
        sketches,
        method=cfg.projection_method,
        block_size=cfg.block_size,
        tolerance=cfg.consistency_tol,
        knn_k=cfg.knn_k,
    )

    report = build_report(
        cfg, sample_map, thresholds, merged, assay, sketches, shared, embedding, failures
    )
    LOGGER.info(
        "Finished scSketch pipeline: %d cells embedded from %d samples (%d failed)",
        embedding.n_cells,
        len(shared.transforms),
        len(failures),
    )
    return PipelineResult(
        config=cfg,
        metrics=metrics,
        thresholds=thresholds,
        doublet_calls=doublet_calls,
        merged=merged,
        assay=assay,
        sketches=sketches,
        shared=shared,
        embedding=embedding,
        failures=failures,
        report=report,
    )
