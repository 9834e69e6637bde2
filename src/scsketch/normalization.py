# src/scsketch/normalization.py

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple, Type

import numpy as np
import pandas as pd
import scipy.sparse as sp

from .blocked import Block, BlockedMatrix, TransformedMatrix, to_dense
from .filtering import MergedDataset

LOGGER = logging.getLogger(__name__)


def rank_features(scores: np.ndarray, n_top: int) -> np.ndarray:
    """
    Positions of the ``n_top`` highest scores, best first.

    Non-finite scores rank last; ties keep feature order.
    """
    scores = np.asarray(scores, dtype=np.float64)
    keyed = np.where(np.isfinite(scores), scores, -np.inf)
    order = np.argsort(-keyed, kind="stable")
    return order[: min(int(n_top), scores.size)]


def _ranked_series(
    scores: np.ndarray,
    top: np.ndarray,
    feature_names: Optional[Sequence[str]],
) -> pd.Series:
    names = (
        pd.Index(np.asarray(feature_names, dtype=str)[top])
        if feature_names is not None
        else pd.Index(top)
    )
    return pd.Series(scores[top], index=names, name="score")


class NormalizationStrategy(ABC):
    """
    Raw counts -> normalized values plus a ranked feature subset.

    ``normalize`` returns a lazily evaluated blocked matrix restricted to the
    ranked features (columns in rank order) and a Series of ranking scores
    indexed by feature name, best first.
    """

    name: str = "base"

    @abstractmethod
    def normalize(
        self,
        counts: BlockedMatrix,
        n_top_features: int,
        *,
        feature_names: Optional[Sequence[str]] = None,
        block_size: Optional[int] = None,
    ) -> Tuple[BlockedMatrix, pd.Series]:
        ...


# ---------------------------------------------------------------------
# Size-factor scaling + log1p
# ---------------------------------------------------------------------
class ScaleLogNormalizer(NormalizationStrategy):
    """Scale every cell to ``target_sum`` total counts, then ``log1p``."""

    name = "scale_log"

    def __init__(self, target_sum: float = 1e4):
        if target_sum <= 0:
            raise ValueError("target_sum must be positive")
        self.target_sum = float(target_sum)

    def _scale(self, totals: np.ndarray) -> np.ndarray:
        scale = np.zeros_like(totals)
        np.divide(self.target_sum, totals, out=scale, where=totals > 0)
        return scale

    @staticmethod
    def _apply(block: Block, factors: np.ndarray, columns: Optional[np.ndarray] = None) -> Block:
        if columns is not None:
            block = block[:, columns]
        if sp.issparse(block):
            return sp.csr_matrix(block.multiply(factors[:, None])).log1p()
        return np.log1p(block * factors[:, None])

    def normalize(self, counts, n_top_features, *, feature_names=None, block_size=None):
        factors = self._scale(counts.row_sums(block_size))

        full = TransformedMatrix(
            counts,
            lambda b, start, stop: self._apply(b, factors[start:stop]),
            counts.n_cols,
        )
        mean, var = full.column_moments(block_size)
        dispersion = np.zeros_like(mean)
        np.divide(var, mean, out=dispersion, where=mean > 0)

        top = rank_features(dispersion, n_top_features)
        LOGGER.info(
            "[Normalize] scale_log: target_sum=%.0f, %d / %d features ranked by dispersion",
            self.target_sum,
            top.size,
            counts.n_cols,
        )
        matrix = TransformedMatrix(
            counts,
            lambda b, start, stop: self._apply(b, factors[start:stop], top),
            top.size,
        )
        return matrix, _ranked_series(dispersion, top, feature_names)


# ---------------------------------------------------------------------
# Analytic Pearson residuals (negative binomial, fixed theta)
# ---------------------------------------------------------------------
class PearsonResidualNormalizer(NormalizationStrategy):
    """
    Analytic Pearson residuals ``(x - mu) / sqrt(mu + mu^2 / theta)`` with
    ``mu = cell_sum * gene_sum / total``, clipped to ``±sqrt(n_cells)``.

    Features are ranked by residual variance. Features with no counts have
    zero residuals everywhere.
    """

    name = "pearson_residuals"

    def __init__(self, theta: float = 100.0, clip: Optional[float] = None):
        if theta <= 0:
            raise ValueError("theta must be positive")
        if clip is not None and clip < 0:
            raise ValueError("Pearson residuals require `clip>=0` or `clip=None`.")
        self.theta = float(theta)
        self.clip = clip

    def _residuals(
        self,
        block: Block,
        cell_sums: np.ndarray,
        gene_sums: np.ndarray,
        total: float,
        clip: float,
    ) -> np.ndarray:
        X = to_dense(block)
        if total <= 0:
            return np.zeros_like(X)
        mu = np.outer(cell_sums, gene_sums) / total
        denom = np.sqrt(mu + mu**2 / self.theta)
        out = np.zeros_like(X)
        np.divide(X - mu, denom, out=out, where=denom > 0)
        return np.clip(out, -clip, clip)

    def normalize(self, counts, n_top_features, *, feature_names=None, block_size=None):
        n = counts.n_rows
        clip = self.clip if self.clip is not None else np.sqrt(n)
        cell_sums = counts.row_sums(block_size)
        gene_mean, _ = counts.column_moments(block_size)
        gene_sums = gene_mean * n
        total = float(cell_sums.sum())

        full = TransformedMatrix(
            counts,
            lambda b, start, stop: self._residuals(b, cell_sums[start:stop], gene_sums, total, clip),
            counts.n_cols,
        )
        _, residual_var = full.column_moments(block_size)

        top = rank_features(residual_var, n_top_features)
        LOGGER.info(
            "[Normalize] pearson_residuals: theta=%.1f, clip=%.1f, %d / %d features ranked by residual variance",
            self.theta,
            clip,
            top.size,
            counts.n_cols,
        )
        gene_top = gene_sums[top]
        matrix = TransformedMatrix(
            counts,
            lambda b, start, stop: self._residuals(b[:, top], cell_sums[start:stop], gene_top, total, clip),
            top.size,
        )
        return matrix, _ranked_series(residual_var, top, feature_names)


NORMALIZERS: Dict[str, Type[NormalizationStrategy]] = {
    "scale_log": ScaleLogNormalizer,
    "pearson_residuals": PearsonResidualNormalizer,
}


def make_normalizer(method: str, *, target_sum: float = 1e4, theta: float = 100.0) -> NormalizationStrategy:
    if method not in NORMALIZERS:
        raise ValueError(f"Unknown normalization '{method}'. Available: {sorted(NORMALIZERS)}")
    if method == "scale_log":
        return ScaleLogNormalizer(target_sum=target_sum)
    return PearsonResidualNormalizer(theta=theta)


# ---------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class NormalizedAssay:
    matrix: BlockedMatrix
    feature_names: pd.Index
    feature_scores: np.ndarray
    method: str

    @property
    def n_features(self) -> int:
        return int(self.matrix.n_cols)


class NormalizedAssayBuilder:
    """Applies one normalization strategy to the merged counts of all kept cells."""

    def __init__(
        self,
        strategy: NormalizationStrategy,
        n_top_features: int = 2000,
        block_size: Optional[int] = None,
    ):
        if n_top_features <= 0:
            raise ValueError("n_top_features must be positive")
        self.strategy = strategy
        self.n_top_features = int(n_top_features)
        self.block_size = block_size

    def build(self, merged: MergedDataset) -> NormalizedAssay:
        LOGGER.info(
            "[Normalize] %s on %d cells x %d features",
            self.strategy.name,
            merged.n_cells,
            len(merged.feature_names),
        )
        matrix, ranked = self.strategy.normalize(
            merged.counts,
            self.n_top_features,
            feature_names=merged.feature_names,
            block_size=self.block_size,
        )
        return NormalizedAssay(
            matrix=matrix,
            feature_names=pd.Index(ranked.index.astype(str)),
            feature_scores=ranked.to_numpy(dtype=np.float64),
            method=self.strategy.name,
        )
