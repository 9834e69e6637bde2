"""
Row-blocked matrix access.

Every algorithm that touches a full cells x features matrix (QC metrics,
normalization statistics, leverage factorization, projection) reads it through
:class:`BlockedMatrix`: a shape plus ``read_rows(start, stop)``. The same code
runs whether rows come from a scipy matrix in memory, a backed AnnData, or a
zarr CSR store on disk.

Blocks are either numpy arrays or scipy CSR matrices. Index pointers of on-disk
stores are int64 so stores may hold more than 2**31 non-zeros.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Callable, Iterator, Optional, Sequence, Tuple, Union

import numpy as np
import scipy.sparse as sp

LOGGER = logging.getLogger(__name__)

DEFAULT_BLOCK_SIZE = 10_000

Block = Union[np.ndarray, sp.csr_matrix]


def to_dense(block: Block, dtype=np.float64) -> np.ndarray:
    if sp.issparse(block):
        return np.asarray(block.toarray(), dtype=dtype)
    return np.asarray(block, dtype=dtype)


class BlockedMatrix(ABC):
    """Abstract cells x features matrix readable in contiguous row blocks."""

    @property
    @abstractmethod
    def shape(self) -> Tuple[int, int]:
        ...

    @abstractmethod
    def read_rows(self, start: int, stop: int) -> Block:
        """Return rows ``[start, stop)`` as a dense array or CSR matrix."""

    @property
    def n_rows(self) -> int:
        return self.shape[0]

    @property
    def n_cols(self) -> int:
        return self.shape[1]

    def iter_blocks(self, block_size: Optional[int] = None) -> Iterator[Tuple[int, int, Block]]:
        block_size = int(block_size or DEFAULT_BLOCK_SIZE)
        if block_size <= 0:
            raise ValueError("block_size must be positive")
        n = self.n_rows
        for start in range(0, n, block_size):
            stop = min(start + block_size, n)
            yield start, stop, self.read_rows(start, stop)

    def rows(self, start: int, stop: int) -> "BlockedMatrix":
        return RowRangeMatrix(self, start, stop)

    def matmul(self, B: np.ndarray, block_size: Optional[int] = None) -> np.ndarray:
        """``X @ B`` computed one row block at a time."""
        B = np.asarray(B, dtype=np.float64)
        out = np.empty((self.n_rows, B.shape[1]), dtype=np.float64)
        for start, stop, block in self.iter_blocks(block_size):
            out[start:stop] = np.asarray(block @ B)
        return out

    def rmatmul(self, C: np.ndarray, block_size: Optional[int] = None) -> np.ndarray:
        """``X.T @ C`` accumulated over row blocks."""
        C = np.asarray(C, dtype=np.float64)
        out = np.zeros((self.n_cols, C.shape[1]), dtype=np.float64)
        for start, stop, block in self.iter_blocks(block_size):
            out += np.asarray(block.T @ C[start:stop])
        return out

    def take_rows(self, indices: Sequence[int], block_size: Optional[int] = None) -> np.ndarray:
        """
        Gather the given rows as a dense array, in the order given.

        Only blocks that contain a requested row are read.
        """
        indices = np.asarray(indices, dtype=np.int64)
        out = np.empty((indices.size, self.n_cols), dtype=np.float64)
        if indices.size == 0:
            return out
        if indices.min() < 0 or indices.max() >= self.n_rows:
            raise IndexError(f"row index out of range for matrix with {self.n_rows} rows")

        block_size = int(block_size or DEFAULT_BLOCK_SIZE)
        order = np.argsort(indices, kind="stable")
        sorted_idx = indices[order]
        block_ids = sorted_idx // block_size
        for b in np.unique(block_ids):
            start = int(b) * block_size
            stop = min(start + block_size, self.n_rows)
            sel = np.flatnonzero(block_ids == b)
            block = self.read_rows(start, stop)
            local = sorted_idx[sel] - start
            out[order[sel]] = to_dense(block[local])
        return out

    def column_moments(self, block_size: Optional[int] = None) -> Tuple[np.ndarray, np.ndarray]:
        """Per-column mean and population variance in one streaming pass."""
        n = self.n_rows
        s1 = np.zeros(self.n_cols, dtype=np.float64)
        s2 = np.zeros(self.n_cols, dtype=np.float64)
        for _, _, block in self.iter_blocks(block_size):
            if sp.issparse(block):
                s1 += np.asarray(block.sum(axis=0)).ravel()
                s2 += np.asarray(block.multiply(block).sum(axis=0)).ravel()
            else:
                s1 += block.sum(axis=0)
                s2 += np.square(block).sum(axis=0)
        if n == 0:
            return s1, s2
        mean = s1 / n
        var = np.maximum(s2 / n - mean**2, 0.0)
        return mean, var

    def row_sums(self, block_size: Optional[int] = None) -> np.ndarray:
        out = np.empty(self.n_rows, dtype=np.float64)
        for start, stop, block in self.iter_blocks(block_size):
            out[start:stop] = np.asarray(block.sum(axis=1)).ravel()
        return out


# ---------------------------------------------------------------------
# Concrete backings
# ---------------------------------------------------------------------
class ArrayBlockedMatrix(BlockedMatrix):
    """
    Wraps anything that is row-sliceable with a ``shape``: numpy arrays, scipy
    sparse matrices, backed AnnData ``X`` datasets, h5py / zarr arrays.
    """

    def __init__(self, data):
        if sp.issparse(data) and not sp.isspmatrix_csr(data):
            data = sp.csr_matrix(data)
        self._data = data
        self._shape = (int(data.shape[0]), int(data.shape[1]))

    @property
    def shape(self) -> Tuple[int, int]:
        return self._shape

    def read_rows(self, start: int, stop: int) -> Block:
        block = self._data[start:stop]
        if sp.issparse(block):
            return sp.csr_matrix(block, dtype=np.float64)
        return np.asarray(block, dtype=np.float64)


class ZarrCSRMatrix(BlockedMatrix):
    """
    CSR matrix stored as ``data`` / ``indices`` / ``indptr`` arrays inside a
    zarr group. Only the rows of one block are ever loaded.
    """

    def __init__(self, group, n_cols: int):
        self._group = group
        self._data = group["data"]
        self._indices = group["indices"]
        self._indptr = group["indptr"]
        self._shape = (int(self._indptr.shape[0]) - 1, int(n_cols))

    @property
    def shape(self) -> Tuple[int, int]:
        return self._shape

    def read_rows(self, start: int, stop: int) -> sp.csr_matrix:
        ptr = np.asarray(self._indptr[start:stop + 1], dtype=np.int64)
        lo, hi = int(ptr[0]), int(ptr[-1])
        data = np.asarray(self._data[lo:hi], dtype=np.float64)
        indices = np.asarray(self._indices[lo:hi])
        return sp.csr_matrix((data, indices, ptr - lo), shape=(stop - start, self.n_cols))


class RowRangeMatrix(BlockedMatrix):
    """View of rows ``[start, stop)`` of another blocked matrix."""

    def __init__(self, base: BlockedMatrix, start: int, stop: int):
        if not (0 <= start <= stop <= base.n_rows):
            raise IndexError(f"row range [{start}, {stop}) outside 0..{base.n_rows}")
        self._base = base
        self._start = int(start)
        self._stop = int(stop)

    @property
    def shape(self) -> Tuple[int, int]:
        return (self._stop - self._start, self._base.n_cols)

    def read_rows(self, start: int, stop: int) -> Block:
        return self._base.read_rows(self._start + start, self._start + stop)


class TransformedMatrix(BlockedMatrix):
    """
    Lazily applies ``fn(block, start, stop)`` to each block of ``base``.

    ``fn`` receives the raw block and the absolute row range so that per-row
    factors (e.g. size factors) can be looked up.
    """

    def __init__(
        self,
        base: BlockedMatrix,
        fn: Callable[[Block, int, int], Block],
        n_cols: int,
    ):
        self._base = base
        self._fn = fn
        self._n_cols = int(n_cols)

    @property
    def shape(self) -> Tuple[int, int]:
        return (self._base.n_rows, self._n_cols)

    def read_rows(self, start: int, stop: int) -> Block:
        return self._fn(self._base.read_rows(start, stop), start, stop)


def as_blocked(data) -> BlockedMatrix:
    if isinstance(data, BlockedMatrix):
        return data
    return ArrayBlockedMatrix(data)
