from __future__ import annotations
import json
import logging
import shutil
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Dict, List, Mapping, Optional

import anndata as ad
import numpy as np
import pandas as pd
import scipy.sparse as sp
import zarr

from .blocked import ArrayBlockedMatrix, BlockedMatrix, ZarrCSRMatrix
from .samples import Sample


LOGGER = logging.getLogger(__name__)


# =====================================================================
# Sample loading
# =====================================================================
def find_sample_files(input_dir: Path, pattern: str = "*.h5ad") -> List[Path]:
    return sorted(Path(p) for p in Path(input_dir).glob(pattern) if Path(p).is_file())


def load_samples(
    input_dir: Path,
    pattern: str = "*.h5ad",
    backed: bool = True,
    n_jobs: int = 4,
) -> Dict[str, Sample]:
    """
    Load one sample per ``.h5ad`` file; the sample id is the file stem.

    With ``backed=True`` the count matrices stay on disk and are only read in
    row blocks.
    """
    files = find_sample_files(input_dir, pattern)
    if not files:
        raise FileNotFoundError(f"No files matching '{pattern}' in {input_dir}")

    stems = [f.stem for f in files]
    dupes = sorted({s for s in stems if stems.count(s) > 1})
    if dupes:
        raise ValueError(f"Duplicate sample ids from file names: {dupes}")

    n_workers = min(8, n_jobs) if n_jobs else 8
    LOGGER.info("[I/O] Loading %d samples with %d I/O threads (backed=%s)", len(files), n_workers, backed)

    def _load_one(path: Path):
        adata = ad.read_h5ad(str(path), backed="r" if backed else None)
        return path.stem, adata

    out: Dict[str, Sample] = {}
    with ThreadPoolExecutor(max_workers=n_workers) as pool:
        futures = {pool.submit(_load_one, f): f for f in files}
        for fut in as_completed(futures):
            sid, adata = fut.result()
            out[sid] = Sample(sid, adata)
            LOGGER.info("[I/O] Loaded %s: %d cells, %d features", sid, adata.n_obs, adata.n_vars)

    return {sid: out[sid] for sid in sorted(out)}


def samples_from_anndata(adata: ad.AnnData, batch_key: str) -> Dict[str, Sample]:
    """Split one AnnData into samples by the ``batch_key`` obs column."""
    if batch_key not in adata.obs:
        raise KeyError(
            f"batch_key '{batch_key}' not found in adata.obs. "
            f"Available columns: {list(adata.obs.columns)}"
        )
    labels = adata.obs[batch_key].astype(str).to_numpy()
    out: Dict[str, Sample] = {}
    for sid in sorted(set(labels)):
        mask = labels == sid
        out[sid] = Sample(sid, adata[mask].copy())
        LOGGER.info("[I/O] Sample %s: %d cells", sid, int(mask.sum()))
    return out


def read_doublet_calls(path: Path) -> Dict[str, pd.DataFrame]:
    """
    Externally computed doublet calls (e.g. SOLO) from one TSV with columns
    ``sample_id, barcode, doublet_label, doublet_score``; indexed by barcode.
    """
    df = pd.read_csv(path, sep="\t", dtype={"sample_id": str, "barcode": str})
    required = {"sample_id", "barcode", "doublet_label", "doublet_score"}
    missing = required.difference(df.columns)
    if missing:
        raise KeyError(f"Doublet call table {path} is missing columns: {sorted(missing)}")
    out = {
        str(sid): g.set_index("barcode")[["doublet_label", "doublet_score"]]
        for sid, g in df.groupby("sample_id", sort=True)
    }
    LOGGER.info("[I/O] Read doublet calls for %d samples from %s", len(out), path)
    return out


# =====================================================================
# Merged count matrix
# =====================================================================
def _column_map(var_names: pd.Index, feature_names: pd.Index) -> np.ndarray:
    """Sample column -> merged column, -1 for features outside the merged space."""
    return np.asarray(feature_names.get_indexer(pd.Index(var_names).astype(str)), dtype=np.int64)


def _remap_block(block, rows: np.ndarray, old_to_new: np.ndarray, n_new: int) -> sp.csr_matrix:
    """
    Select ``rows`` of a block and move its columns into the merged feature space.

    Columns mapped to -1 are dropped; merged features absent from the sample
    stay implicit zeros.
    """
    X = sp.csr_matrix(block)[rows]
    X.sum_duplicates()
    new_idx = old_to_new[X.indices]
    keep = new_idx >= 0
    row_of = np.repeat(np.arange(X.shape[0]), np.diff(X.indptr))
    return sp.csr_matrix(
        (X.data[keep], (row_of[keep], new_idx[keep])),
        shape=(X.shape[0], n_new),
    )


def _iter_kept_blocks(
    sample: Sample,
    keep: np.ndarray,
    old_to_new: np.ndarray,
    n_new: int,
    block_size: Optional[int],
):
    for start, stop, block in sample.counts.iter_blocks(block_size):
        lo, hi = np.searchsorted(keep, [start, stop])
        if lo == hi:
            continue
        yield _remap_block(block, keep[lo:hi] - start, old_to_new, n_new)


def empty_counts(n_cols: int) -> BlockedMatrix:
    return ArrayBlockedMatrix(sp.csr_matrix((0, n_cols), dtype=np.float64))


def merge_in_memory(
    samples: Mapping[str, Sample],
    keep: Mapping[str, np.ndarray],
    feature_names: pd.Index,
    block_size: Optional[int] = None,
) -> BlockedMatrix:
    n_new = len(feature_names)
    pieces = []
    for sid, sample in samples.items():
        old_to_new = _column_map(sample.var_names, feature_names)
        pieces.extend(_iter_kept_blocks(sample, keep[sid], old_to_new, n_new, block_size))
    if not pieces:
        return empty_counts(n_new)
    X = sp.vstack(pieces, format="csr")
    X.indices = X.indices.astype(np.int64)
    X.indptr = X.indptr.astype(np.int64)
    return ArrayBlockedMatrix(X)


class ZarrBackedMerger:
    """
    Streams the kept rows of every sample into a zarr CSR store.

    Two passes over the inputs:
      1) count the non-zeros of every kept, remapped row block
      2) write ``X/data``, ``X/indices`` and ``X/indptr`` block by block

    The full merged matrix is never held in memory.
    """

    def __init__(
        self,
        samples: Mapping[str, Sample],
        keep: Mapping[str, np.ndarray],
        feature_names: pd.Index,
        out_store: Path,
        block_size: Optional[int] = None,
    ):
        if not samples:
            raise RuntimeError("ZarrBackedMerger: no samples to merge.")
        self.samples = dict(samples)
        self.keep = {sid: np.asarray(keep[sid], dtype=np.int64) for sid in self.samples}
        self.feature_names = pd.Index(feature_names)
        self.out_store = Path(out_store)
        self.block_size = block_size
        self.N_total = int(sum(k.size for k in self.keep.values()))
        self._maps = {
            sid: _column_map(s.var_names, self.feature_names) for sid, s in self.samples.items()
        }

    def _blocks(self, sid: str):
        return _iter_kept_blocks(
            self.samples[sid],
            self.keep[sid],
            self._maps[sid],
            len(self.feature_names),
            self.block_size,
        )

    def _compute_nnz(self) -> int:
        nnz_total = 0
        LOGGER.info("[ZarrMerge] First pass: measuring nnz for allocation")
        for sid in self.samples:
            nnz = sum(Xp.nnz for Xp in self._blocks(sid))
            LOGGER.info("[ZarrMerge] Sample %s: kept rows=%d, nnz=%d", sid, self.keep[sid].size, nnz)
            nnz_total += nnz
        LOGGER.info("[ZarrMerge] Total nnz: %d", nnz_total)
        return nnz_total

    def merge(self) -> ZarrCSRMatrix:
        nnz_total = self._compute_nnz()

        if self.out_store.exists():
            shutil.rmtree(self.out_store)
        self.out_store.parent.mkdir(parents=True, exist_ok=True)
        root = zarr.open_group(str(self.out_store), mode="w")
        root.attrs["n_rows"] = self.N_total
        root.attrs["n_cols"] = len(self.feature_names)
        X = root.create_group("X")

        X_data = X.zeros(
            name="data",
            shape=(nnz_total,),
            chunks=(max(1, min(nnz_total, 10_000_000)),),
            dtype="float32",
        )
        X_indices = X.zeros(
            name="indices",
            shape=(nnz_total,),
            chunks=(max(1, min(nnz_total, 10_000_000)),),
            dtype="int32",
        )
        X_indptr = X.zeros(
            name="indptr",
            shape=(self.N_total + 1,),
            chunks=(max(1, min(self.N_total + 1, 100_000)),),
            dtype="int64",
        )
        LOGGER.info("[ZarrMerge] Allocated Zarr CSR arrays (%d rows, %d nnz)", self.N_total, nnz_total)

        data_cursor = 0
        row_cursor = 0
        for sid in self.samples:
            LOGGER.info("[ZarrMerge] Writing sample %s", sid)
            for Xp in self._blocks(sid):
                rows = Xp.shape[0]
                L = Xp.nnz
                if L:
                    X_data[data_cursor:data_cursor + L] = Xp.data.astype(np.float32)
                    X_indices[data_cursor:data_cursor + L] = Xp.indices.astype(np.int32)
                # indptr is length rows+1; the final entry is written once at the end
                X_indptr[row_cursor:row_cursor + rows] = Xp.indptr[:-1].astype(np.int64) + data_cursor
                data_cursor += L
                row_cursor += rows

        X_indptr[self.N_total] = nnz_total
        LOGGER.info("[ZarrMerge] Finished writing CSR arrays -> %s", self.out_store)

        return ZarrCSRMatrix(zarr.open_group(str(self.out_store), mode="r")["X"], len(self.feature_names))


def merge_samples(
    samples: Mapping[str, Sample],
    keep: Mapping[str, np.ndarray],
    feature_names: pd.Index,
    out_path: Optional[Path] = None,
    block_size: Optional[int] = None,
) -> BlockedMatrix:
    """
    Stack the kept rows of each sample, in the given sample order, in the
    merged feature space.

    Without ``out_path`` the result is an in-memory CSR matrix; with it, the
    rows are streamed into a zarr store at ``out_path`` (overwritten).
    """
    if not samples:
        raise RuntimeError("merge_samples: no samples to merge.")
    if out_path is None:
        return merge_in_memory(samples, keep, feature_names, block_size=block_size)

    LOGGER.info("[merge_samples] Zarr merge -> %s", out_path)
    merger = ZarrBackedMerger(samples, keep, feature_names, Path(out_path), block_size=block_size)
    return merger.merge()


# =====================================================================
# Persisted outputs
# =====================================================================
def _write_tsv(df: pd.DataFrame, path: Path) -> None:
    df.to_csv(path, sep="\t", index=False, na_rep="NA")
    LOGGER.info("[I/O] Wrote %s (%d rows)", path, len(df))


def sketch_table(sketches) -> pd.DataFrame:
    frames = [
        pd.DataFrame(
            {
                "sample_id": sk.sample_id,
                "global_index": sk.indices,
                "weight": sk.weights,
                "probability": sk.probabilities,
            }
        )
        for sk in sketches.values()
    ]
    if not frames:
        return pd.DataFrame(columns=["sample_id", "global_index", "weight", "probability"])
    return pd.concat(frames, axis=0, ignore_index=True)


def write_outputs(result, out_dir: Path) -> Dict[str, Path]:
    """
    Persist a pipeline result.

    Writes ``thresholds.tsv``, ``cells.tsv``, ``embedding.tsv``, ``sketch.tsv``
    and ``run_report.json`` into ``out_dir`` and returns their paths.
    """
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    paths = {
        "thresholds": out_dir / "thresholds.tsv",
        "cells": out_dir / "cells.tsv",
        "embedding": out_dir / "embedding.tsv",
        "sketch": out_dir / "sketch.tsv",
        "report": out_dir / "run_report.json",
    }

    _write_tsv(result.thresholds.to_frame(), paths["thresholds"])
    _write_tsv(result.merged.audit, paths["cells"])
    _write_tsv(result.embedding.to_frame(), paths["embedding"])
    _write_tsv(sketch_table(result.sketches), paths["sketch"])

    paths["report"].write_text(json.dumps(result.report, indent=2, default=str))
    LOGGER.info("[I/O] Wrote %s", paths["report"])
    return paths
