# src/scsketch/projection.py

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Mapping, Optional, Tuple

import numpy as np
import pandas as pd

from .blocked import BlockedMatrix, RowRangeMatrix
from .errors import ConsistencyViolation
from .integration import SampleTransform, SharedEmbedding
from .sketch import Sketch

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class FullEmbedding:
    coords: np.ndarray
    global_index: np.ndarray
    sample_id: np.ndarray
    is_sketch: np.ndarray

    @property
    def n_cells(self) -> int:
        return int(self.coords.shape[0])

    @property
    def n_dims(self) -> int:
        return int(self.coords.shape[1])

    def to_frame(self, *, with_sample: bool = False) -> pd.DataFrame:
        df = pd.DataFrame(
            np.asarray(self.coords),
            columns=[f"dim_{i + 1}" for i in range(self.n_dims)],
        )
        df.insert(0, "global_index", self.global_index)
        if with_sample:
            df.insert(1, "sample_id", self.sample_id)
            df.insert(2, "is_sketch", self.is_sketch)
        return df


def relative_error(projected: np.ndarray, reference: np.ndarray) -> float:
    """Relative Frobenius error ``||P - R|| / ||R||`` (absolute when ``R == 0``)."""
    diff = float(np.linalg.norm(projected - reference))
    denom = float(np.linalg.norm(reference))
    return diff / denom if denom > 0 else diff


def _knn_project(
    block_z: np.ndarray,
    sketch_unit: np.ndarray,
    sketch_coords: np.ndarray,
    k: int,
) -> np.ndarray:
    """Similarity-weighted mean of the ``k`` most cosine-similar sketch cells."""
    norms = np.linalg.norm(block_z, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    sim = (block_z / norms) @ sketch_unit.T

    k = min(k, sketch_unit.shape[0])
    nn = np.argsort(-sim, axis=1, kind="stable")[:, :k]
    w = np.clip(np.take_along_axis(sim, nn, axis=1), 0.0, None)
    w_sum = w.sum(axis=1, keepdims=True)
    # no positive similarity: plain mean of the neighbours
    w = np.where(w_sum > 0, w, 1.0)
    w /= w.sum(axis=1, keepdims=True)
    return np.einsum("ij,ijk->ik", w, sketch_coords[nn])


def _project_sample(
    matrix: BlockedMatrix,
    transform: SampleTransform,
    sketch: Sketch,
    sketch_coords: np.ndarray,
    out: np.ndarray,
    *,
    method: str,
    knn_k: int,
    block_size: Optional[int],
) -> None:
    if method == "linear":
        for start, stop, block in matrix.iter_blocks(block_size):
            out[start:stop] = transform.apply(block)
        return

    # knn
    sketch_rows = matrix.take_rows(sketch.local_indices, block_size)
    sketch_z = sketch.standardize(sketch_rows)
    norms = np.linalg.norm(sketch_z, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    sketch_unit = sketch_z / norms
    for start, stop, block in matrix.iter_blocks(block_size):
        out[start:stop] = _knn_project(sketch.standardize(block), sketch_unit, sketch_coords, knn_k)
    out[sketch.local_indices] = sketch_coords


def project(
    shared: SharedEmbedding,
    assay_matrix: BlockedMatrix,
    sample_ranges: Mapping[str, Tuple[int, int]],
    sketches: Mapping[str, Sketch],
    *,
    method: Literal["linear", "knn"] = "linear",
    block_size: Optional[int] = None,
    tolerance: float = 1e-6,
    knn_k: int = 15,
    out_path: Optional[Path] = None,
) -> FullEmbedding:
    """
    Embed every cell of every integrated sample into the shared space.

    Rows are streamed sample by sample in global-index order. Afterwards the
    projected sketch cells of each sample must reproduce their shared
    coordinates within ``tolerance`` (relative Frobenius error), otherwise
    ConsistencyViolation is raised.
    """
    if method not in ("linear", "knn"):
        raise ValueError(f"Unknown projection method: {method}")

    sids = [sid for sid in sample_ranges if sid in shared.transforms]
    sids.sort(key=lambda sid: sample_ranges[sid][0])
    n_total = int(sum(sample_ranges[s][1] - sample_ranges[s][0] for s in sids))

    if out_path is not None:
        out_path = Path(out_path)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        coords = np.memmap(out_path, dtype=np.float64, mode="w+", shape=(max(n_total, 1), shared.n_dims))[:n_total]
    else:
        coords = np.empty((n_total, shared.n_dims), dtype=np.float64)

    global_index = np.empty(n_total, dtype=np.int64)
    sample_col = np.empty(n_total, dtype=object)
    is_sketch = np.zeros(n_total, dtype=bool)

    cursor = 0
    for sid in sids:
        start, stop = sample_ranges[sid]
        n = stop - start
        sketch = sketches[sid]
        target = shared.coords_for(sid)
        rows = slice(cursor, cursor + n)

        _project_sample(
            RowRangeMatrix(assay_matrix, start, stop),
            shared.transforms[sid],
            sketch,
            target,
            coords[rows],
            method=method,
            knn_k=knn_k,
            block_size=block_size,
        )
        global_index[rows] = np.arange(start, stop)
        sample_col[rows] = sid
        is_sketch[cursor + sketch.local_indices] = True

        err = relative_error(coords[rows][sketch.local_indices], target)
        LOGGER.info(
            "[Project] %s: %d cells (%s), sketch consistency error=%.2e",
            sid,
            n,
            method,
            err,
        )
        if err > tolerance:
            raise ConsistencyViolation(sid, err, tolerance)
        cursor += n

    if isinstance(coords, np.memmap):
        coords.flush()

    return FullEmbedding(
        coords=coords,
        global_index=global_index,
        sample_id=sample_col,
        is_sketch=is_sketch,
    )
