# src/scsketch/integration.py

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Tuple

import numpy as np
from scipy.sparse.linalg import LinearOperator, svds
from sklearn.linear_model import Ridge
from sklearn.neighbors import NearestNeighbors

from .blocked import to_dense
from .sketch import Sketch

LOGGER = logging.getLogger(__name__)

# dense cross-product SVD up to this many entries, Lanczos above
_DENSE_CCA_LIMIT = 25_000_000


@dataclass(frozen=True)
class SampleTransform:
    """Affine map ``((x - mean) / scale) @ weights + offset`` into the shared space."""

    sample_id: str
    mean: np.ndarray
    scale: np.ndarray
    weights: np.ndarray
    offset: np.ndarray

    @property
    def n_dims(self) -> int:
        return int(self.weights.shape[1])

    def apply(self, block) -> np.ndarray:
        Z = (to_dense(block) - self.mean) / self.scale
        return Z @ self.weights + self.offset


@dataclass(frozen=True)
class SharedEmbedding:
    """
    Coordinates of every sketch cell in one shared low-dimensional space.

    Rows are ordered by global cell index.
    """

    coords: np.ndarray
    global_index: np.ndarray
    sample_id: np.ndarray
    transforms: Dict[str, SampleTransform]
    reference: str
    merge_order: List[str]
    n_anchors: Dict[str, int] = field(default_factory=dict)

    @property
    def n_dims(self) -> int:
        return int(self.coords.shape[1])

    def coords_for(self, sample_id: str) -> np.ndarray:
        return self.coords[self.sample_id == sample_id]


def merge_order(sketches: Mapping[str, Sketch]) -> List[str]:
    """Largest sketch first, ties by ascending sample id."""
    return sorted(sketches, key=lambda sid: (-sketches[sid].size, sid))


def _svd_flip(Vt: np.ndarray) -> np.ndarray:
    """Sign of each component so that its largest-magnitude loading is positive."""
    idx = np.argmax(np.abs(Vt), axis=1)
    signs = np.sign(Vt[np.arange(Vt.shape[0]), idx])
    signs[signs == 0] = 1.0
    return signs


def reference_transform(sample_id: str, Z: np.ndarray, sketch: Sketch, n_dims: int) -> SampleTransform:
    """PCA of the standardized reference sketch; its loadings are the transform."""
    _, _, Vt = np.linalg.svd(Z, full_matrices=False)
    Vt = Vt[:n_dims]
    Vt = Vt * _svd_flip(Vt)[:, None]
    weights = np.zeros((Z.shape[1], n_dims))
    weights[:, : Vt.shape[0]] = Vt.T
    return SampleTransform(
        sample_id=sample_id,
        mean=sketch.feature_mean,
        scale=sketch.feature_scale,
        weights=weights,
        offset=np.zeros(n_dims),
    )


def _l2_rows(X: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(X, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return X / norms


def canonical_vectors(Z1: np.ndarray, Z2: np.ndarray, n_components: int) -> Tuple[np.ndarray, np.ndarray]:
    """
    CCA on the cell x cell cross-product ``Z1 @ Z2.T``.

    Returns l2-normalized canonical vectors for the cells of both inputs.
    """
    k1, k2 = Z1.shape[0], Z2.shape[0]
    c = max(1, min(int(n_components), k1, k2))

    if k1 * k2 <= _DENSE_CCA_LIMIT or c >= min(k1, k2):
        U, s, Vt = np.linalg.svd(Z1 @ Z2.T, full_matrices=False)
        U, Vt = U[:, :c], Vt[:c]
    else:
        op = LinearOperator(
            shape=(k1, k2),
            matvec=lambda v: Z1 @ (Z2.T @ v),
            rmatvec=lambda v: Z2 @ (Z1.T @ v),
            dtype=np.float64,
        )
        U, s, Vt = svds(op, k=c, v0=np.ones(min(k1, k2)))
        order = np.argsort(-s, kind="stable")
        U, Vt = U[:, order], Vt[order]

    signs = _svd_flip(Vt)
    return _l2_rows(U * signs), _l2_rows(Vt.T * signs)


def find_anchors(
    query: np.ndarray,
    pool: np.ndarray,
    *,
    k: int = 5,
    min_anchors: int = 10,
    sample_id: str = "",
) -> np.ndarray:
    """
    Mutual nearest-neighbour pairs ``(query_row, pool_row)``.

    Falls back to each query cell's nearest pool cell when fewer than
    ``min_anchors`` mutual pairs exist.
    """
    k_pool = min(k, pool.shape[0])
    k_query = min(k, query.shape[0])

    nn_pool = NearestNeighbors(n_neighbors=k_pool).fit(pool)
    _, q_to_p = nn_pool.kneighbors(query)
    nn_query = NearestNeighbors(n_neighbors=k_query).fit(query)
    _, p_to_q = nn_query.kneighbors(pool)

    pool_sets = [set(row) for row in p_to_q]
    pairs = [
        (i, int(j))
        for i in range(query.shape[0])
        for j in q_to_p[i]
        if i in pool_sets[j]
    ]

    if len(pairs) < min_anchors:
        LOGGER.warning(
            "[Integrate] %s: only %d mutual anchors (< %d); using one-directional nearest neighbours",
            sample_id,
            len(pairs),
            min_anchors,
        )
        pairs = [(i, int(q_to_p[i, 0])) for i in range(query.shape[0])]

    return np.asarray(pairs, dtype=np.int64).reshape(-1, 2)


def aligned_transform(
    sample_id: str,
    Z: np.ndarray,
    sketch: Sketch,
    pool_Z: np.ndarray,
    pool_coords: np.ndarray,
    *,
    anchor_k: int = 5,
    min_anchors: int = 10,
    ridge_alpha: float = 1.0,
) -> Tuple[SampleTransform, int]:
    """
    Map one sample into the space of the already integrated pool.

    Anchored sample cells are regressed (ridge) onto the mean pool coordinates
    of their anchor partners.
    """
    n_dims = pool_coords.shape[1]
    u, v = canonical_vectors(Z, pool_Z, n_dims)
    anchors = find_anchors(u, v, k=anchor_k, min_anchors=min_anchors, sample_id=sample_id)

    cells, inverse = np.unique(anchors[:, 0], return_inverse=True)
    targets = np.zeros((cells.size, n_dims))
    counts = np.zeros(cells.size)
    np.add.at(targets, inverse, pool_coords[anchors[:, 1]])
    np.add.at(counts, inverse, 1.0)
    targets /= counts[:, None]

    model = Ridge(alpha=ridge_alpha, fit_intercept=True).fit(Z[cells], targets)
    transform = SampleTransform(
        sample_id=sample_id,
        mean=sketch.feature_mean,
        scale=sketch.feature_scale,
        weights=np.asarray(model.coef_, dtype=np.float64).T.copy(),
        offset=np.asarray(model.intercept_, dtype=np.float64).copy(),
    )
    return transform, int(anchors.shape[0])


def integrate(
    sketch_rows: Mapping[str, np.ndarray],
    sketches: Mapping[str, Sketch],
    *,
    n_dims: int = 30,
    anchor_k: int = 5,
    min_anchors: int = 10,
    ridge_alpha: float = 1.0,
) -> SharedEmbedding:
    """
    Align the sketches of all samples into one shared embedding.

    ``sketch_rows[sid]`` holds the normalized rows of ``sketches[sid].indices``
    in the same order. Samples are merged largest first; the first is the
    reference and defines the space through its own PCA.
    """
    if not sketches:
        raise ValueError("integrate() needs at least one sketch")

    order = merge_order(sketches)
    ref = order[0]
    n_features = sketch_rows[ref].shape[1]
    dims = max(1, min(int(n_dims), n_features, sketches[ref].size))
    if dims < n_dims:
        LOGGER.warning("[Integrate] Shared embedding reduced to %d dimensions (requested %d)", dims, n_dims)

    LOGGER.info("[Integrate] Merge order: %s (reference=%s)", ", ".join(order), ref)

    Z = {sid: sketches[sid].standardize(sketch_rows[sid]) for sid in order}

    transforms: Dict[str, SampleTransform] = {ref: reference_transform(ref, Z[ref], sketches[ref], dims)}
    coords: Dict[str, np.ndarray] = {ref: transforms[ref].apply(sketch_rows[ref])}
    n_anchors: Dict[str, int] = {ref: 0}

    pool_Z = Z[ref]
    pool_coords = coords[ref]
    for sid in order[1:]:
        transform, n = aligned_transform(
            sid,
            Z[sid],
            sketches[sid],
            pool_Z,
            pool_coords,
            anchor_k=anchor_k,
            min_anchors=min_anchors,
            ridge_alpha=ridge_alpha,
        )
        transforms[sid] = transform
        coords[sid] = transform.apply(sketch_rows[sid])
        n_anchors[sid] = n
        LOGGER.info("[Integrate] %s: %d anchors against a pool of %d sketch cells", sid, n, pool_Z.shape[0])

        pool_Z = np.vstack([pool_Z, Z[sid]])
        pool_coords = np.vstack([pool_coords, coords[sid]])

    by_index = sorted(sketches, key=lambda sid: int(sketches[sid].indices[0]))
    return SharedEmbedding(
        coords=np.vstack([coords[sid] for sid in by_index]),
        global_index=np.concatenate([sketches[sid].indices for sid in by_index]),
        sample_id=np.concatenate([np.full(sketches[sid].size, sid, dtype=object) for sid in by_index]),
        transforms=transforms,
        reference=ref,
        merge_order=order,
        n_anchors=n_anchors,
    )
