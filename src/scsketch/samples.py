from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, Mapping, Union

import anndata as ad
import pandas as pd

from .blocked import BlockedMatrix, as_blocked


@dataclass(frozen=True)
class Sample:
    """
    One ingested sample: a cells x features count matrix plus per-cell metadata.

    ``adata.X`` may be in memory or backed on disk; it is never modified.
    """

    sample_id: str
    adata: ad.AnnData

    @property
    def n_cells(self) -> int:
        return int(self.adata.n_obs)

    @property
    def n_features(self) -> int:
        return int(self.adata.n_vars)

    @property
    def counts(self) -> BlockedMatrix:
        return as_blocked(self.adata.X)

    @property
    def var_names(self) -> pd.Index:
        return pd.Index(self.adata.var_names.astype(str))

    @property
    def obs(self) -> pd.DataFrame:
        return self.adata.obs


SampleInput = Union[Mapping[str, ad.AnnData], Mapping[str, Sample], Iterable[Sample]]


def as_sample_map(samples: SampleInput) -> Dict[str, Sample]:
    """
    Normalize the accepted sample inputs to ``{sample_id: Sample}`` sorted by id.

    Sorted order fixes the global cell index and every other per-sample order.
    """
    out: Dict[str, Sample] = {}
    if isinstance(samples, Mapping):
        for sid, value in samples.items():
            sid = str(sid)
            if isinstance(value, Sample):
                if value.sample_id != sid:
                    raise ValueError(f"Sample key '{sid}' != sample_id '{value.sample_id}'")
                out[sid] = value
            else:
                out[sid] = Sample(sid, value)
    else:
        for s in samples:
            if s.sample_id in out:
                raise ValueError(f"Duplicate sample_id '{s.sample_id}'")
            out[s.sample_id] = s

    if not out:
        raise ValueError("No samples supplied")
    return {sid: out[sid] for sid in sorted(out)}
