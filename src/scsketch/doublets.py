# src/scsketch/doublets.py

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Literal, Mapping, Optional

import anndata as ad
import numpy as np
import pandas as pd
import scipy.sparse as sp

from .samples import Sample

LOGGER = logging.getLogger(__name__)

SINGLET = "singlet"
DOUBLET = "doublet"
DOUBLET_COLUMNS = ["doublet_label", "doublet_score"]


class DoubletClassifier(ABC):
    """
    Doublet-detection collaborator.

    ``classify`` returns one row per cell of the sample, in local row order,
    with ``doublet_label`` in {"singlet", "doublet"} and a float
    ``doublet_score``.
    """

    @abstractmethod
    def classify(self, sample: Sample) -> pd.DataFrame:
        ...


def _calls_frame(labels: np.ndarray, scores: np.ndarray) -> pd.DataFrame:
    return pd.DataFrame(
        {
            "doublet_label": pd.Categorical(labels, categories=[SINGLET, DOUBLET]),
            "doublet_score": np.asarray(scores, dtype=np.float64),
        },
        index=pd.RangeIndex(len(labels), name="local_index"),
    )


def call_doublets(
    scores: np.ndarray,
    mode: str,
    *,
    fixed_threshold: float,
    expected_rate: float,
) -> np.ndarray:
    """Boolean doublet call per score: a fixed cut-off or the top expected fraction."""
    scores = np.asarray(scores, dtype=np.float64)
    n = scores.size

    if mode == "fixed":
        return scores > fixed_threshold

    if mode == "rate":
        k = int(np.ceil(expected_rate * n))
        if k <= 0:
            return np.zeros(n, dtype=bool)
        idx = np.argsort(-scores, kind="stable")[:k]
        mask = np.zeros(n, dtype=bool)
        mask[idx] = True
        return mask

    raise ValueError(f"Unknown doublet threshold mode: {mode}")


def validate_calls(calls: pd.DataFrame, sample: Sample) -> pd.DataFrame:
    missing = set(DOUBLET_COLUMNS).difference(calls.columns)
    if missing:
        raise KeyError(
            f"Doublet calls for sample '{sample.sample_id}' are missing columns: {sorted(missing)}"
        )
    if len(calls) != sample.n_cells:
        raise ValueError(
            f"Doublet calls for sample '{sample.sample_id}' have {len(calls)} rows, "
            f"expected {sample.n_cells}"
        )
    labels = calls["doublet_label"].astype(str).to_numpy()
    bad = sorted(set(labels).difference({SINGLET, DOUBLET}))
    if bad:
        raise ValueError(f"Unknown doublet labels for sample '{sample.sample_id}': {bad}")
    return _calls_frame(labels, calls["doublet_score"].to_numpy())


# ---------------------------------------------------------------------
# Scrublet (scanpy)
# ---------------------------------------------------------------------
class ScrubletClassifier(DoubletClassifier):
    """
    Scores cells with ``scanpy.pp.scrublet`` and calls doublets either above a
    fixed score or as the top ``expected_doublet_rate`` fraction.

    Scrublet needs the sample's counts in memory.
    """

    def __init__(
        self,
        *,
        doublet_mode: Literal["fixed", "rate"] = "rate",
        doublet_score_threshold: float = 0.25,
        expected_doublet_rate: float = 0.06,
        random_state: int = 0,
    ):
        if doublet_mode == "fixed" and not (0 < doublet_score_threshold < 1):
            raise ValueError("doublet_score_threshold must be in (0, 1)")
        if doublet_mode == "rate" and not (0 < expected_doublet_rate < 0.5):
            raise ValueError("expected_doublet_rate must be in (0, 0.5)")
        self.doublet_mode = doublet_mode
        self.doublet_score_threshold = doublet_score_threshold
        self.expected_doublet_rate = expected_doublet_rate
        self.random_state = random_state

    def classify(self, sample: Sample) -> pd.DataFrame:
        import scanpy as sc

        X = sample.counts.read_rows(0, sample.n_cells)
        adata = ad.AnnData(
            X=sp.csr_matrix(X, dtype=np.float32),
            obs=pd.DataFrame(index=sample.adata.obs_names.astype(str)),
            var=pd.DataFrame(index=sample.var_names),
        )
        sc.pp.scrublet(
            adata,
            expected_doublet_rate=self.expected_doublet_rate,
            random_state=self.random_state,
        )
        scores = adata.obs["doublet_score"].to_numpy()
        mask = call_doublets(
            scores,
            self.doublet_mode,
            fixed_threshold=self.doublet_score_threshold,
            expected_rate=self.expected_doublet_rate,
        )
        LOGGER.info(
            "[Doublets] %s: mode=%s, detected=%d / %d (%.2f%%)",
            sample.sample_id,
            self.doublet_mode,
            int(mask.sum()),
            mask.size,
            100 * mask.mean() if mask.size else 0.0,
        )
        return _calls_frame(np.where(mask, DOUBLET, SINGLET), scores)


# ---------------------------------------------------------------------
# Externally computed calls (e.g. SOLO output)
# ---------------------------------------------------------------------
class PrecomputedDoubletClassifier(DoubletClassifier):
    """
    Serves calls computed elsewhere.

    ``calls`` maps sample id to a table with ``doublet_label`` and
    ``doublet_score``, either in local row order or indexed by barcode.
    Samples without an entry are all singlets with score 0.
    """

    def __init__(self, calls: Mapping[str, pd.DataFrame], *, by_barcode: bool = False):
        self.calls = dict(calls)
        self.by_barcode = by_barcode

    def classify(self, sample: Sample) -> pd.DataFrame:
        table: Optional[pd.DataFrame] = self.calls.get(sample.sample_id)
        if table is None:
            LOGGER.warning(
                "[Doublets] %s: no precomputed calls; treating all cells as singlets",
                sample.sample_id,
            )
            return _calls_frame(
                np.full(sample.n_cells, SINGLET, dtype=object),
                np.zeros(sample.n_cells),
            )
        if self.by_barcode:
            table = table.reindex(sample.adata.obs_names.astype(str))
            if table["doublet_label"].isna().any():
                raise KeyError(
                    f"Precomputed doublet calls for sample '{sample.sample_id}' "
                    "do not cover every barcode"
                )
        return validate_calls(table.reset_index(drop=True), sample)
