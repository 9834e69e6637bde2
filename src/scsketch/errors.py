# src/scsketch/errors.py

from __future__ import annotations

from typing import Optional


class ScSketchError(Exception):
    """Base class for all scSketch errors."""


class ConfigurationError(ScSketchError, ValueError):
    """Invalid option values. Raised before any computation starts."""

    def __init__(self, message: str, option: Optional[str] = None):
        self.option = option
        prefix = f"[config:{option}] " if option else "[config] "
        super().__init__(prefix + message)


class DegenerateMetricError(ScSketchError):
    """A QC metric has zero spread (MAD = 0) within a sample."""

    def __init__(self, sample_id: str, metric: str, message: str = ""):
        self.sample_id = sample_id
        self.metric = metric
        self.stage = "thresholds"
        super().__init__(
            f"[thresholds] sample={sample_id} metric={metric}: "
            f"{message or 'zero median absolute deviation'}"
        )


class SampleFailure(ScSketchError):
    """
    A per-sample, recoverable failure.

    The pipeline excludes the offending sample and keeps going; the failure is
    listed in the run report.
    """

    def __init__(self, sample_id: str, stage: str, message: str):
        self.sample_id = sample_id
        self.stage = stage
        self.message = message
        super().__init__(f"[{stage}] sample={sample_id}: {message}")

    def to_dict(self) -> dict:
        return {"sample_id": self.sample_id, "stage": self.stage, "message": self.message}


class ConsistencyViolation(ScSketchError):
    """Projected sketch coordinates drifted from the shared embedding."""

    def __init__(self, sample_id: str, error: float, tolerance: float):
        self.sample_id = sample_id
        self.error = error
        self.tolerance = tolerance
        self.stage = "projection"
        super().__init__(
            f"[projection] sample={sample_id}: sketch rows differ from the shared "
            f"embedding by relative error {error:.3e} > tolerance {tolerance:.1e}"
        )


class PipelineError(ScSketchError):
    """Fatal pipeline-level failure; aborts the run."""

    def __init__(self, stage: str, message: str):
        self.stage = stage
        super().__init__(f"[{stage}] {message}")
