# src/scsketch/filtering.py

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Iterable, List, Literal, Mapping, Optional, Tuple

import numpy as np
import pandas as pd

from . import io_utils
from .blocked import BlockedMatrix, RowRangeMatrix
from .doublets import DOUBLET
from .errors import SampleFailure
from .metrics import MetricStore
from .outliers import ThresholdTable, flag_outliers
from .samples import Sample

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class MergedDataset:
    """
    All kept cells of all surviving samples.

    Global indices run sample by sample in sorted sample-id order, so every
    sample owns the contiguous range ``sample_ranges[sample_id]``. A sample
    excluded after the merge loses its range; the rows stay in ``counts`` but
    belong to no sample.
    """

    counts: BlockedMatrix
    cells: pd.DataFrame
    audit: pd.DataFrame
    feature_names: pd.Index
    sample_ranges: Dict[str, Tuple[int, int]]
    failures: Tuple[SampleFailure, ...] = field(default_factory=tuple)

    @property
    def n_cells(self) -> int:
        return int(sum(stop - start for start, stop in self.sample_ranges.values()))

    @property
    def sample_ids(self) -> List[str]:
        return list(self.sample_ranges)

    def sample_counts(self, sample_id: str) -> BlockedMatrix:
        start, stop = self.sample_ranges[sample_id]
        return RowRangeMatrix(self.counts, start, stop)

    def cells_per_sample(self) -> Dict[str, int]:
        return {sid: stop - start for sid, (start, stop) in self.sample_ranges.items()}

    def exclude(self, failures: Iterable[SampleFailure]) -> "MergedDataset":
        """
        Drop samples that failed after the merge (e.g. at sketching).

        Their cells disappear from ``cells`` and get a missing global index and
        the failing stage in the audit table. Global indices of the remaining
        samples do not change.
        """
        failures = [f for f in failures if f.sample_id in self.sample_ranges]
        if not failures:
            return self
        dropped = {f.sample_id: f.stage for f in failures}

        audit = self.audit.copy()
        rows = audit["sample_id"].isin(list(dropped)).to_numpy()
        audit.loc[rows, "global_index"] = pd.NA
        audit.loc[rows, "excluded_stage"] = audit.loc[rows, "sample_id"].map(dropped)

        for f in failures:
            LOGGER.warning(
                "[Filter] %s: %d cells excluded after %s failure",
                f.sample_id,
                self.cells_per_sample()[f.sample_id],
                f.stage,
            )
        return replace(
            self,
            cells=self.cells[~self.cells["sample_id"].isin(list(dropped))].reset_index(drop=True),
            audit=audit,
            sample_ranges={s: r for s, r in self.sample_ranges.items() if s not in dropped},
            failures=self.failures + tuple(failures),
        )


def join_features(
    var_names: Mapping[str, pd.Index],
    how: Literal["intersection", "union"] = "intersection",
) -> pd.Index:
    """
    Shared feature space of several samples.

    ``intersection`` keeps features present everywhere, in the order of the
    first sample; ``union`` is the sorted union (missing features read as 0).
    """
    names = [pd.Index(v.astype(str)) for v in var_names.values()]
    if not names:
        return pd.Index([], dtype=str)
    for sid, v in var_names.items():
        if not pd.Index(v).is_unique:
            raise ValueError(f"Sample '{sid}' has duplicate feature names")
    if how == "union":
        genes = set()
        for v in names:
            genes.update(v)
        return pd.Index(sorted(genes))
    if how == "intersection":
        common = set(names[0])
        for v in names[1:]:
            common.intersection_update(v)
        return pd.Index([g for g in names[0] if g in common])
    raise ValueError(f"Unknown feature_join: {how}")


def _sample_audit(
    sample: Sample,
    metric_frame: pd.DataFrame,
    calls: pd.DataFrame,
    thresholds: ThresholdTable,
    *,
    two_sided: bool,
) -> pd.DataFrame:
    flags = flag_outliers(
        metric_frame,
        thresholds.for_sample(sample.sample_id),
        two_sided=two_sided,
    )
    labels = calls["doublet_label"].astype(str).to_numpy()
    keep = ~flags["outlier_any"].to_numpy() & (labels != DOUBLET)

    audit = pd.DataFrame(
        {
            "sample_id": sample.sample_id,
            "local_index": np.arange(sample.n_cells, dtype=np.int64),
            "barcode": metric_frame["barcode"].to_numpy(),
            "keep": keep,
            "doublet_label": labels,
            "doublet_score": calls["doublet_score"].to_numpy(),
        }
    )
    for col in flags.columns:
        audit[col] = flags[col].to_numpy()
    return audit


def filter_samples(
    samples: Mapping[str, Sample],
    doublet_calls: Mapping[str, pd.DataFrame],
    thresholds: ThresholdTable,
    metric_store: MetricStore,
    *,
    two_sided: bool = False,
    feature_join: Literal["intersection", "union"] = "intersection",
    block_size: Optional[int] = None,
    merge_store: Optional[Path] = None,
) -> MergedDataset:
    """
    Keep cells that are neither metric outliers nor doublets and merge them.

    A cell is kept when ``not outlier_any and doublet_label != "doublet"``.
    Every cell, kept or not, stays in the audit table with its flags. Samples
    without doublet calls are skipped; samples with no kept cell are dropped
    and reported as SampleFailure(stage="filter").
    """
    failures: List[SampleFailure] = []
    audits: List[pd.DataFrame] = []
    keep_pos: Dict[str, np.ndarray] = {}

    for sid in sorted(samples):
        if sid not in doublet_calls:
            LOGGER.warning("[Filter] %s: no doublet calls; sample skipped", sid)
            continue
        sample = samples[sid]
        audit = _sample_audit(
            sample,
            metric_store[sid],
            doublet_calls[sid],
            thresholds,
            two_sided=two_sided,
        )
        audits.append(audit)

        keep = audit["keep"].to_numpy()
        n_kept = int(keep.sum())
        LOGGER.info(
            "[Filter] %s: kept %d / %d cells (outliers=%d, doublets=%d)",
            sid,
            n_kept,
            sample.n_cells,
            int(audit["outlier_any"].sum()),
            int((audit["doublet_label"] == DOUBLET).sum()),
        )
        if n_kept == 0:
            failure = SampleFailure(sid, "filter", "no cells survived QC and doublet filtering")
            LOGGER.warning("%s", failure)
            failures.append(failure)
            continue
        keep_pos[sid] = np.flatnonzero(keep)

    audit_all = (
        pd.concat(audits, axis=0, ignore_index=True)
        if audits
        else pd.DataFrame(columns=["sample_id", "local_index", "barcode", "keep"])
    )

    # ---------------------------------------------------------
    # Global index: sample by sample, local order preserved
    # ---------------------------------------------------------
    sample_ranges: Dict[str, Tuple[int, int]] = {}
    cursor = 0
    for sid, pos in keep_pos.items():
        sample_ranges[sid] = (cursor, cursor + pos.size)
        cursor += pos.size

    global_index = pd.array([pd.NA] * len(audit_all), dtype="Int64")
    if len(audit_all):
        in_merge = audit_all["sample_id"].isin(list(keep_pos)).to_numpy()
        kept_rows = np.flatnonzero(audit_all["keep"].to_numpy(dtype=bool) & in_merge)
        global_index[kept_rows] = np.arange(kept_rows.size)
    audit_all.insert(2, "global_index", global_index)

    excluded = pd.Series(None, index=audit_all.index, dtype=object)
    dropped = [f.sample_id for f in failures]
    excluded[audit_all["sample_id"].isin(dropped).to_numpy()] = "filter"
    audit_all["excluded_stage"] = excluded

    cells = _build_cell_table(samples, keep_pos, audit_all)

    feature_names = join_features(
        {sid: samples[sid].var_names for sid in keep_pos}, how=feature_join
    )
    if keep_pos:
        LOGGER.info(
            "[Filter] Merging %d samples: %d cells x %d features (feature_join=%s)",
            len(keep_pos),
            cursor,
            len(feature_names),
            feature_join,
        )
        counts = io_utils.merge_samples(
            {sid: samples[sid] for sid in keep_pos},
            keep_pos,
            feature_names,
            out_path=merge_store,
            block_size=block_size,
        )
    else:
        counts = io_utils.empty_counts(len(feature_names))

    return MergedDataset(
        counts=counts,
        cells=cells,
        audit=audit_all,
        feature_names=feature_names,
        sample_ranges=sample_ranges,
        failures=tuple(failures),
    )


def _build_cell_table(
    samples: Mapping[str, Sample],
    keep_pos: Mapping[str, np.ndarray],
    audit: pd.DataFrame,
) -> pd.DataFrame:
    frames = []
    for sid, pos in keep_pos.items():
        rows = audit[(audit["sample_id"] == sid) & audit["keep"].astype(bool)]
        df = pd.DataFrame(
            {
                "global_index": rows["global_index"].to_numpy(dtype=np.int64),
                "sample_id": sid,
                "local_index": pos,
                "barcode": rows["barcode"].to_numpy(),
            }
        )
        obs = samples[sid].obs
        if obs.shape[1]:
            meta = obs.iloc[pos].reset_index(drop=True)
            meta = meta.drop(columns=[c for c in meta.columns if c in df.columns])
            df = pd.concat([df, meta], axis=1)
        frames.append(df)
    if not frames:
        return pd.DataFrame(columns=["global_index", "sample_id", "local_index", "barcode"])
    return pd.concat(frames, axis=0, ignore_index=True)
