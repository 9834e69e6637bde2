# src/scsketch/metrics.py

from __future__ import annotations

import logging
from types import MappingProxyType
from typing import Dict, Iterator, Mapping, Optional, Sequence

import numpy as np
import pandas as pd
import scipy.sparse as sp
from joblib import Parallel, delayed

from .samples import Sample

LOGGER = logging.getLogger(__name__)

METRIC_COLUMNS = [
    "total_counts",
    "n_genes_by_counts",
    "pct_counts_mt",
    "pct_counts_ribo",
    "pct_counts_hb",
]

# (floor, ceiling) of each metric's domain
METRIC_DOMAINS = {
    "total_counts": (0.0, None),
    "n_genes_by_counts": (0.0, None),
    "pct_counts_mt": (0.0, 100.0),
    "pct_counts_ribo": (0.0, 100.0),
    "pct_counts_hb": (0.0, 100.0),
}


def _gene_category_masks(
    var_names: pd.Index,
    *,
    mt_prefix: str,
    ribo_prefixes: Sequence[str],
    hb_regex: str,
) -> Dict[str, np.ndarray]:
    names = pd.Index(var_names.astype(str))
    return {
        "mt": np.asarray(names.str.startswith(mt_prefix)),
        "ribo": np.asarray(names.str.startswith(tuple(ribo_prefixes))),
        "hb": np.asarray(names.str.contains(hb_regex, regex=True)),
    }


# ---------------------------------------------------------------------
# QC metric computation (sparse-safe, streamed)
# ---------------------------------------------------------------------
def compute_cell_metrics(
    sample: Sample,
    *,
    mt_prefix: str = "MT-",
    ribo_prefixes: Sequence[str] = ("RPL", "RPS"),
    hb_regex: str = r"^(?:HB[AB])",
    block_size: Optional[int] = None,
) -> pd.DataFrame:
    """
    Per-cell QC metrics for one sample, read one row block at a time.

    Returns a DataFrame indexed by local row (0..n-1) with the columns in
    ``METRIC_COLUMNS`` plus ``barcode``.
    """
    masks = _gene_category_masks(
        sample.var_names,
        mt_prefix=mt_prefix,
        ribo_prefixes=ribo_prefixes,
        hb_regex=hb_regex,
    )
    cat_idx = {k: np.flatnonzero(m) for k, m in masks.items()}

    n = sample.n_cells
    total_counts = np.zeros(n, dtype=np.float64)
    n_genes = np.zeros(n, dtype=np.int64)
    cat_counts = {k: np.zeros(n, dtype=np.float64) for k in cat_idx}

    for start, stop, X in sample.counts.iter_blocks(block_size):
        if sp.issparse(X):
            # explicit zeros may be stored; count non-zero values, not slots
            n_genes[start:stop] = np.asarray((X != 0).sum(axis=1)).ravel()
        else:
            n_genes[start:stop] = np.count_nonzero(X, axis=1)
        total_counts[start:stop] = np.asarray(X.sum(axis=1)).ravel()
        for k, idx in cat_idx.items():
            if idx.size:
                cat_counts[k][start:stop] = np.asarray(X[:, idx].sum(axis=1)).ravel()

    denom = np.maximum(total_counts, 1)
    df = pd.DataFrame(
        {
            "total_counts": total_counts,
            "n_genes_by_counts": n_genes,
            "pct_counts_mt": 100 * cat_counts["mt"] / denom,
            "pct_counts_ribo": 100 * cat_counts["ribo"] / denom,
            "pct_counts_hb": 100 * cat_counts["hb"] / denom,
            "barcode": sample.adata.obs_names.astype(str),
        },
        index=pd.RangeIndex(n, name="local_index"),
    )

    LOGGER.info(
        "[Metrics] %s: %d cells, median total_counts=%.1f, median n_genes=%.1f",
        sample.sample_id,
        n,
        float(np.median(total_counts)) if n else 0.0,
        float(np.median(n_genes)) if n else 0.0,
    )
    return df


class MetricStore(Mapping[str, pd.DataFrame]):
    """Read-only ``sample_id -> per-cell metric table`` mapping."""

    def __init__(self, tables: Mapping[str, pd.DataFrame]):
        self._tables = MappingProxyType({sid: tables[sid] for sid in sorted(tables)})

    def __getitem__(self, sample_id: str) -> pd.DataFrame:
        return self._tables[sample_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._tables)

    def __len__(self) -> int:
        return len(self._tables)

    @classmethod
    def from_samples(
        cls,
        samples: Mapping[str, Sample],
        *,
        mt_prefix: str = "MT-",
        ribo_prefixes: Sequence[str] = ("RPL", "RPS"),
        hb_regex: str = r"^(?:HB[AB])",
        block_size: Optional[int] = None,
        n_jobs: int = 1,
    ) -> "MetricStore":
        sample_ids = list(samples)
        LOGGER.info("[Metrics] Computing QC metrics for %d samples (n_jobs=%d)", len(sample_ids), n_jobs)
        tables = Parallel(n_jobs=n_jobs, prefer="threads")(
            delayed(compute_cell_metrics)(
                samples[sid],
                mt_prefix=mt_prefix,
                ribo_prefixes=ribo_prefixes,
                hb_regex=hb_regex,
                block_size=block_size,
            )
            for sid in sample_ids
        )
        return cls(dict(zip(sample_ids, tables)))

    def values_for(self, sample_id: str, metric: str) -> np.ndarray:
        return self._tables[sample_id][metric].to_numpy(dtype=np.float64)

    def to_frame(self) -> pd.DataFrame:
        """Long table with ``sample_id`` and ``local_index`` columns."""
        frames = []
        for sid, df in self._tables.items():
            out = df.reset_index()
            out.insert(0, "sample_id", sid)
            frames.append(out)
        if not frames:
            return pd.DataFrame(columns=["sample_id", "local_index", "barcode", *METRIC_COLUMNS])
        return pd.concat(frames, axis=0, ignore_index=True)
