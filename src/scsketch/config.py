from __future__ import annotations

from pathlib import Path
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import ConfigurationError

KNOWN_METRICS = (
    "total_counts",
    "n_genes_by_counts",
    "pct_counts_mt",
    "pct_counts_ribo",
    "pct_counts_hb",
)


class PipelineConfig(BaseModel):
    """Options for one sketch-and-project integration run."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    # ---- Core options ----
    outlier_k: float = Field(3.0, gt=0)
    sketch_budget: int = Field(5000, gt=0)
    sketch_rank: int = Field(50, gt=0)
    mix_alpha: float = Field(0.1, ge=0.0, le=1.0)
    integration_dims: int = Field(30, gt=0)
    seed: int = Field(0, ge=0)

    # ---- QC ----
    qc_metrics: List[str] = Field(
        default_factory=lambda: ["total_counts", "n_genes_by_counts", "pct_counts_mt"]
    )
    two_sided: bool = False
    degenerate_policy: Literal["skip", "raise"] = "skip"
    mt_prefix: str = "MT-"
    ribo_prefixes: List[str] = Field(default_factory=lambda: ["RPL", "RPS"])
    hb_regex: str = r"^(?:HB[AB])"

    # ---- Normalization ----
    normalization: Literal["scale_log", "pearson_residuals"] = "scale_log"
    n_top_features: int = Field(2000, gt=0)
    target_sum: float = Field(1e4, gt=0)
    theta: float = Field(100.0, gt=0)
    feature_join: Literal["intersection", "union"] = "intersection"

    # ---- Factorization ----
    oversample: int = Field(10, ge=0)
    max_iter: int = Field(25, gt=0)
    svd_tol: float = Field(1e-4, gt=0)
    time_budget: Optional[float] = Field(None, gt=0)

    # ---- Integration / projection ----
    anchor_k: int = Field(5, gt=0)
    min_anchors: int = Field(10, gt=0)
    ridge_alpha: float = Field(1.0, gt=0)
    projection_method: Literal["linear", "knn"] = "linear"
    knn_k: int = Field(15, gt=0)
    consistency_tol: float = Field(1e-6, gt=0)

    # ---- Compute ----
    block_size: int = Field(10_000, gt=0)
    n_jobs: int = Field(4, gt=0)

    # ---- Output ----
    output_dir: Optional[Path] = None
    merge_store: Optional[Path] = None
    logfile: Optional[Path] = None

    @field_validator("qc_metrics")
    def validate_metrics(cls, v: List[str]) -> List[str]:
        unknown = [m for m in v if m not in KNOWN_METRICS]
        if unknown:
            raise ValueError(
                f"Unknown QC metric(s): {', '.join(unknown)}. "
                f"Supported: {', '.join(KNOWN_METRICS)}"
            )
        # de-duplicate, keep order
        return list(dict.fromkeys(v))

    @model_validator(mode="after")
    def check_rank_vs_dims(self):
        if self.sketch_rank > self.sketch_budget:
            raise ValueError(
                f"sketch_rank ({self.sketch_rank}) must not exceed sketch_budget "
                f"({self.sketch_budget})"
            )
        if self.integration_dims > self.n_top_features:
            raise ValueError(
                f"integration_dims ({self.integration_dims}) must not exceed "
                f"n_top_features ({self.n_top_features})"
            )
        return self


def build_config(**options) -> PipelineConfig:
    """
    Validate options and build a PipelineConfig.

    pydantic validation errors are re-raised as ConfigurationError naming the
    first offending option.
    """
    try:
        return PipelineConfig(**options)
    except ValidationError as e:
        errors = e.errors()
        first = errors[0] if errors else {}
        loc = first.get("loc") or ()
        option = str(loc[0]) if loc else None
        message = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ())) or 'config'}: {err.get('msg')}"
            for err in errors
        )
        raise ConfigurationError(message, option=option) from e
