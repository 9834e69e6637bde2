# src/scsketch/outliers.py

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterator, List, Literal, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy.stats import median_abs_deviation

from .errors import DegenerateMetricError
from .metrics import METRIC_DOMAINS, MetricStore

LOGGER = logging.getLogger(__name__)

# MAD -> standard deviation under normality
MAD_SCALE = 1.4826

THRESHOLD_COLUMNS = ["sample_id", "metric", "lower", "upper"]


@dataclass(frozen=True)
class MetricThreshold:
    sample_id: str
    metric: str
    lower: Optional[float]
    upper: Optional[float]
    median: float
    mad: float
    degenerate: bool = False

    def flag(self, values: np.ndarray, *, two_sided: bool = False) -> np.ndarray:
        """Boolean outlier flag per value. Degenerate thresholds flag nothing."""
        values = np.asarray(values, dtype=np.float64)
        flags = np.zeros(values.shape, dtype=bool)
        if self.degenerate:
            return flags
        if self.upper is not None:
            flags |= values > self.upper
        if two_sided and self.lower is not None:
            flags |= values < self.lower
        return flags


def compute_bounds(
    values: Sequence[float],
    k: float = 3.0,
    *,
    metric: str = "metric",
    sample_id: str = "",
    domain: Tuple[Optional[float], Optional[float]] = (0.0, None),
    on_degenerate: Literal["skip", "raise"] = "skip",
) -> MetricThreshold:
    """
    Robust ``median ± k * 1.4826 * MAD`` bounds for one metric of one sample.

    The lower bound is reported as absent when it would fall below the domain
    floor; the upper bound is clipped to the domain ceiling. A metric with zero
    MAD (or no values) is degenerate: with ``on_degenerate="skip"`` both bounds
    are absent and no cell is flagged, with ``"raise"`` a DegenerateMetricError
    is raised.
    """
    x = np.asarray(values, dtype=np.float64)
    x = x[np.isfinite(x)]
    floor, ceiling = domain

    if x.size == 0:
        med, mad = float("nan"), 0.0
    else:
        med = float(np.median(x))
        mad = float(MAD_SCALE * median_abs_deviation(x, scale=1.0))

    if mad == 0.0:
        if on_degenerate == "raise":
            raise DegenerateMetricError(sample_id, metric)
        LOGGER.warning(
            "[Thresholds] %s/%s: MAD is zero (%d values); metric not used for filtering",
            sample_id,
            metric,
            x.size,
        )
        return MetricThreshold(
            sample_id=sample_id,
            metric=metric,
            lower=None,
            upper=None,
            median=med,
            mad=0.0,
            degenerate=True,
        )

    lower: Optional[float] = med - k * mad
    upper: Optional[float] = med + k * mad

    if floor is not None and lower < floor:
        lower = None
    if ceiling is not None and upper > ceiling:
        upper = float(ceiling)

    return MetricThreshold(
        sample_id=sample_id,
        metric=metric,
        lower=lower,
        upper=upper,
        median=med,
        mad=mad,
    )


class ThresholdTable:
    """Immutable set of thresholds keyed by ``(sample_id, metric)``."""

    def __init__(self, thresholds: Sequence[MetricThreshold]):
        self._by_key: Dict[Tuple[str, str], MetricThreshold] = {}
        for t in thresholds:
            key = (t.sample_id, t.metric)
            if key in self._by_key:
                raise ValueError(f"Duplicate threshold for {key}")
            self._by_key[key] = t

    def __iter__(self) -> Iterator[MetricThreshold]:
        return iter(self._by_key.values())

    def __len__(self) -> int:
        return len(self._by_key)

    def get(self, sample_id: str, metric: str) -> MetricThreshold:
        return self._by_key[(sample_id, metric)]

    def for_sample(self, sample_id: str) -> List[MetricThreshold]:
        return [t for (sid, _), t in self._by_key.items() if sid == sample_id]

    @property
    def degenerate(self) -> List[MetricThreshold]:
        return [t for t in self if t.degenerate]

    def to_frame(self, *, full: bool = False) -> pd.DataFrame:
        cols = THRESHOLD_COLUMNS + (["median", "mad", "degenerate"] if full else [])
        rows = [
            {
                "sample_id": t.sample_id,
                "metric": t.metric,
                "lower": t.lower,
                "upper": t.upper,
                "median": t.median,
                "mad": t.mad,
                "degenerate": t.degenerate,
            }
            for t in self
        ]
        return pd.DataFrame(rows, columns=cols)


def compute_thresholds(
    metric_store: MetricStore,
    metrics: Sequence[str],
    k: float = 3.0,
    *,
    on_degenerate: Literal["skip", "raise"] = "skip",
) -> ThresholdTable:
    thresholds = []
    for sid in metric_store:
        for metric in metrics:
            t = compute_bounds(
                metric_store.values_for(sid, metric),
                k,
                metric=metric,
                sample_id=sid,
                domain=METRIC_DOMAINS.get(metric, (None, None)),
                on_degenerate=on_degenerate,
            )
            LOGGER.debug(
                "[Thresholds] %s/%s: median=%.3g mad=%.3g lower=%s upper=%s",
                sid, metric, t.median, t.mad, t.lower, t.upper,
            )
            thresholds.append(t)
    return ThresholdTable(thresholds)


def flag_outliers(
    metric_frame: pd.DataFrame,
    thresholds: Sequence[MetricThreshold],
    *,
    two_sided: bool = False,
) -> pd.DataFrame:
    """
    Per-metric outlier flags for one sample plus their logical OR.

    Columns: ``outlier_<metric>`` for every threshold and ``outlier_any``.
    """
    flags = pd.DataFrame(index=metric_frame.index)
    any_flag = np.zeros(len(metric_frame), dtype=bool)
    for t in thresholds:
        flag = t.flag(metric_frame[t.metric].to_numpy(), two_sided=two_sided)
        flags[f"outlier_{t.metric}"] = flag
        any_flag |= flag
    flags["outlier_any"] = any_flag
    return flags
