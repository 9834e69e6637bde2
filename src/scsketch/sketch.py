# src/scsketch/sketch.py

from __future__ import annotations

import logging
import time
import zlib
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Tuple, Union

import numpy as np
from joblib import Parallel, delayed

from .blocked import BlockedMatrix, TransformedMatrix, to_dense
from .errors import SampleFailure

LOGGER = logging.getLogger(__name__)

# singular values below this fraction of the largest are treated as zero
_RANK_EPS = 1e-10


@dataclass(frozen=True)
class Sketch:
    """Weighted cell subset of one sample, in global cell indices."""

    sample_id: str
    indices: np.ndarray
    weights: np.ndarray
    probabilities: np.ndarray
    leverage: np.ndarray
    feature_mean: np.ndarray
    feature_scale: np.ndarray
    global_offset: int
    rank: int
    n_iter: int

    @property
    def size(self) -> int:
        return int(self.indices.size)

    @property
    def local_indices(self) -> np.ndarray:
        return self.indices - self.global_offset

    def standardize(self, block) -> np.ndarray:
        return (to_dense(block) - self.feature_mean) / self.feature_scale


def sample_rng(seed: int, sample_id: str) -> np.random.Generator:
    """Per-sample generator: same (seed, sample_id) always gives the same stream."""
    return np.random.default_rng([int(seed), zlib.crc32(str(sample_id).encode("utf-8"))])


def standardize_features(
    matrix: BlockedMatrix, block_size: Optional[int] = None
) -> Tuple[np.ndarray, np.ndarray, BlockedMatrix]:
    """Per-feature mean / standard deviation and a lazily standardized view."""
    mean, var = matrix.column_moments(block_size)
    scale = np.sqrt(var)
    scale[scale == 0] = 1.0
    view = TransformedMatrix(
        matrix,
        lambda b, start, stop: (to_dense(b) - mean) / scale,
        matrix.n_cols,
    )
    return mean, scale, view


# ---------------------------------------------------------------------
# Blocked randomized SVD
# ---------------------------------------------------------------------
def blocked_randomized_svd(
    A: BlockedMatrix,
    rank: int,
    *,
    rng: np.random.Generator,
    oversample: int = 10,
    max_iter: int = 25,
    tol: float = 1e-4,
    time_budget: Optional[float] = None,
    block_size: Optional[int] = None,
    sample_id: str = "",
) -> Tuple[np.ndarray, np.ndarray, int]:
    """
    Top-``rank`` left singular vectors and singular values of ``A``.

    Randomized range finder with power iterations; every product with ``A``
    streams over row blocks and the basis is re-orthonormalised (QR) after each
    half-step. Iteration stops once the relative change of the top singular
    values drops below ``tol``.

    The basis holds at least ``2 * rank`` columns: ``oversample`` is raised to
    ``rank`` when smaller.

    Raises SampleFailure(stage="sketch") when that does not happen within
    ``max_iter`` power iterations or ``time_budget`` seconds.
    """
    t0 = time.monotonic()
    n, m = A.shape
    r = max(1, min(int(rank), n, m))
    ell = min(r + max(int(oversample), r), n, m)

    omega = rng.standard_normal((m, ell))
    Q, _ = np.linalg.qr(A.matmul(omega, block_size))

    def _project(Q):
        B = A.rmatmul(Q, block_size).T  # ell x m == Q^T A
        Ub, s, _ = np.linalg.svd(B, full_matrices=False)
        return Ub, s

    Ub, s = _project(Q)
    prev = s[:r]

    for it in range(1, int(max_iter) + 1):
        Z, _ = np.linalg.qr(A.rmatmul(Q, block_size))
        Q, _ = np.linalg.qr(A.matmul(Z, block_size))
        Ub, s = _project(Q)

        cur = s[:r]
        ref = np.linalg.norm(prev)
        change = np.linalg.norm(cur - prev) / ref if ref > 0 else float(np.linalg.norm(cur) > 0)
        LOGGER.debug("[Sketch] %s: power iteration %d, relative change=%.3e", sample_id, it, change)

        if change < tol:
            return Q @ Ub[:, :r], s[:r], it

        if time_budget is not None and time.monotonic() - t0 > time_budget:
            raise SampleFailure(
                sample_id,
                "sketch",
                f"factorization exceeded time budget of {time_budget:g}s after {it} iterations",
            )
        prev = cur

    raise SampleFailure(
        sample_id,
        "sketch",
        f"factorization did not converge within {max_iter} power iterations (tol={tol:g})",
    )


def leverage_scores(U: np.ndarray, s: np.ndarray) -> Tuple[np.ndarray, int]:
    """Squared row norms of the left singular vectors with non-zero singular value."""
    if s.size == 0 or s[0] <= 0:
        return np.zeros(U.shape[0]), 0
    keep = s > s[0] * _RANK_EPS
    U = U[:, keep]
    return np.einsum("ij,ij->i", U, U), int(keep.sum())


def mixed_probabilities(leverage: np.ndarray, mix_alpha: float, *, sample_id: str = "") -> np.ndarray:
    """``q = (1 - alpha) * leverage / sum(leverage) + alpha / n``."""
    n = leverage.size
    total = float(leverage.sum())
    if total <= 0:
        if mix_alpha == 0:
            raise SampleFailure(
                sample_id,
                "sketch",
                "all leverage scores are zero and mix_alpha is 0; sampling distribution is degenerate",
            )
        p = np.zeros(n)
    else:
        p = leverage / total
    q = (1.0 - mix_alpha) * p + mix_alpha / n
    return q / q.sum()


def sketch_sample(
    matrix: BlockedMatrix,
    *,
    sample_id: str,
    global_offset: int = 0,
    budget: int = 5000,
    seed: int = 0,
    rank: int = 50,
    mix_alpha: float = 0.1,
    oversample: int = 10,
    max_iter: int = 25,
    tol: float = 1e-4,
    time_budget: Optional[float] = None,
    block_size: Optional[int] = None,
) -> Sketch:
    """
    Leverage-score sketch of one sample's normalized rows.

    Draws ``min(budget, n_cells)`` distinct cells with probability
    ``q_i = (1 - mix_alpha) * leverage_i / sum(leverage) + mix_alpha / n`` and
    weights each by ``1 / q_i``. Deterministic for a given
    ``(seed, sample_id)``.
    """
    n = matrix.n_rows
    if n == 0:
        raise SampleFailure(sample_id, "sketch", "sample has no cells")
    if not 0.0 <= mix_alpha <= 1.0:
        raise ValueError("mix_alpha must be in [0, 1]")

    rng = sample_rng(seed, sample_id)
    mean, scale, view = standardize_features(matrix, block_size)

    try:
        U, s, n_iter = blocked_randomized_svd(
            view,
            rank,
            rng=rng,
            oversample=oversample,
            max_iter=max_iter,
            tol=tol,
            time_budget=time_budget,
            block_size=block_size,
            sample_id=sample_id,
        )
    except np.linalg.LinAlgError as e:
        raise SampleFailure(sample_id, "sketch", f"factorization failed: {e}") from e

    leverage, eff_rank = leverage_scores(U, s)
    q = mixed_probabilities(leverage, mix_alpha, sample_id=sample_id)

    k = min(int(budget), n)
    n_support = int(np.count_nonzero(q))
    if n_support < k:
        raise SampleFailure(
            sample_id,
            "sketch",
            f"only {n_support} cells have non-zero sampling probability, need {k}",
        )
    if k == n:
        local = np.arange(n)
    else:
        local = np.sort(rng.choice(n, size=k, replace=False, p=q))

    LOGGER.info(
        "[Sketch] %s: %d / %d cells (rank=%d, power iterations=%d, mix_alpha=%.2f)",
        sample_id,
        k,
        n,
        eff_rank,
        n_iter,
        mix_alpha,
    )
    return Sketch(
        sample_id=sample_id,
        indices=local.astype(np.int64) + int(global_offset),
        weights=1.0 / q[local],
        probabilities=q[local],
        leverage=leverage,
        feature_mean=mean,
        feature_scale=scale,
        global_offset=int(global_offset),
        rank=eff_rank,
        n_iter=n_iter,
    )


class LeverageSketchSampler:
    """Sketches every sample of a normalized assay, one task per sample."""

    def __init__(
        self,
        *,
        budget: int = 5000,
        rank: int = 50,
        mix_alpha: float = 0.1,
        seed: int = 0,
        oversample: int = 10,
        max_iter: int = 25,
        tol: float = 1e-4,
        time_budget: Optional[float] = None,
        block_size: Optional[int] = None,
        n_jobs: int = 1,
    ):
        self.params = dict(
            budget=budget,
            rank=rank,
            mix_alpha=mix_alpha,
            seed=seed,
            oversample=oversample,
            max_iter=max_iter,
            tol=tol,
            time_budget=time_budget,
            block_size=block_size,
        )
        self.n_jobs = n_jobs

    def sample(self, matrix: BlockedMatrix, sample_id: str, global_offset: int = 0) -> Sketch:
        return sketch_sample(matrix, sample_id=sample_id, global_offset=global_offset, **self.params)

    def _task(self, matrix, sample_id, global_offset) -> Union[Sketch, SampleFailure]:
        try:
            return self.sample(matrix, sample_id, global_offset)
        except SampleFailure as failure:
            return failure

    def sample_all(
        self,
        matrix: BlockedMatrix,
        sample_ranges: Mapping[str, Tuple[int, int]],
    ) -> Tuple[Dict[str, Sketch], List[SampleFailure]]:
        """
        Sketch each contiguous sample range of ``matrix``.

        A failing sample does not affect the others; its SampleFailure is
        returned instead of a sketch.
        """
        sample_ids = list(sample_ranges)
        LOGGER.info("[Sketch] Sketching %d samples (n_jobs=%d)", len(sample_ids), self.n_jobs)
        results = Parallel(n_jobs=self.n_jobs, prefer="threads")(
            delayed(self._task)(matrix.rows(*sample_ranges[sid]), sid, sample_ranges[sid][0])
            for sid in sample_ids
        )

        sketches: Dict[str, Sketch] = {}
        failures: List[SampleFailure] = []
        for sid, res in zip(sample_ids, results):
            if isinstance(res, SampleFailure):
                LOGGER.warning("%s", res)
                failures.append(res)
            else:
                sketches[sid] = res
        return sketches, failures
