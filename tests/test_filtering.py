# tests/test_filtering.py

import numpy as np
import pandas as pd
import scipy.sparse as sp
import anndata as ad
import pytest

from scsketch.blocked import ZarrCSRMatrix, to_dense
from scsketch.doublets import DOUBLET, PrecomputedDoubletClassifier
from scsketch.errors import SampleFailure
from scsketch.filtering import filter_samples, join_features
from scsketch.metrics import MetricStore
from scsketch.outliers import compute_thresholds
from scsketch.samples import Sample, as_sample_map


def _calls(samples, tables=None):
    clf = PrecomputedDoubletClassifier(tables or {})
    return {sid: clf.classify(s) for sid, s in samples.items()}


def _run(samples, calls=None, metrics=("total_counts",), k=3.0, **kwargs):
    store = MetricStore.from_samples(samples)
    thresholds = compute_thresholds(store, list(metrics), k)
    return filter_samples(samples, calls if calls is not None else _calls(samples), thresholds, store, **kwargs)


def _outlier_sample(sid="s1", n=50, seed=0):
    """One cell with 100x the counts of the others."""
    rng = np.random.default_rng(seed)
    X = rng.poisson(2.0, size=(n, 10)).astype(np.float32)
    X[7] *= 100
    adata = ad.AnnData(
        X=sp.csr_matrix(X),
        obs=pd.DataFrame(index=[f"{sid}_{i}" for i in range(n)]),
        var=pd.DataFrame(index=[f"g{i}" for i in range(10)]),
    )
    return Sample(sid, adata)


# -------------------------------------------------------------------------
# Keep rule + audit
# -------------------------------------------------------------------------
def test_outliers_and_doublets_removed(make_doublets):
    samples = as_sample_map([_outlier_sample()])
    calls_table = make_doublets(50, 5, seed=3)
    calls_table.loc[7, "doublet_label"] = "singlet"
    merged = _run(samples, _calls(samples, {"s1": calls_table}))

    audit = merged.audit
    assert len(audit) == 50
    assert bool(audit.loc[7, "outlier_total_counts"])
    assert not bool(audit.loc[7, "keep"])
    expected_keep = (~audit["outlier_any"]) & (audit["doublet_label"] != DOUBLET)
    np.testing.assert_array_equal(audit["keep"], expected_keep)

    n_kept = int(expected_keep.sum())
    assert n_kept <= 44
    assert merged.n_cells == n_kept
    assert merged.sample_ranges == {"s1": (0, n_kept)}
    assert audit["global_index"].isna().sum() == 50 - n_kept


def test_global_index_contiguous_per_sample(make_adata):
    samples = as_sample_map(
        {"b": make_adata(n_cells=30, seed=1), "a": make_adata(n_cells=20, seed=2), "c": make_adata(n_cells=10, seed=3)}
    )
    merged = _run(samples)

    assert merged.sample_ids == ["a", "b", "c"]
    start = 0
    for sid in ["a", "b", "c"]:
        lo, hi = merged.sample_ranges[sid]
        assert lo == start
        rows = merged.cells[merged.cells["sample_id"] == sid]
        np.testing.assert_array_equal(rows["global_index"], np.arange(lo, hi))
        # local order preserved
        assert (np.diff(rows["local_index"].to_numpy()) > 0).all()
        start = hi
    assert start == merged.n_cells


def test_merged_rows_are_the_kept_input_rows(make_adata):
    samples = as_sample_map({"a": make_adata(n_cells=40, seed=1), "b": make_adata(n_cells=25, seed=2)})
    merged = _run(samples, block_size=7)

    X = to_dense(merged.counts.read_rows(0, merged.n_cells))
    for _, row in merged.cells.iterrows():
        src = samples[row["sample_id"]].adata.X[row["local_index"]].toarray().ravel()
        np.testing.assert_allclose(X[row["global_index"]], src)


def test_sample_with_no_cells_left_is_reported(make_adata, make_doublets):
    samples = as_sample_map({"a": make_adata(n_cells=20, seed=1), "b": make_adata(n_cells=10, seed=2)})
    calls = _calls(samples, {"b": make_doublets(10, 10)})
    merged = _run(samples, calls)

    assert merged.sample_ids == ["a"]
    assert [(f.sample_id, f.stage) for f in merged.failures] == [("b", "filter")]
    # dropped sample cells stay in the audit
    assert (merged.audit["sample_id"] == "b").sum() == 10
    assert (merged.audit.loc[merged.audit["sample_id"] == "b", "excluded_stage"] == "filter").all()
    assert merged.audit.loc[merged.audit["sample_id"] == "a", "excluded_stage"].isna().all()


def test_sample_without_calls_skipped(make_adata):
    samples = as_sample_map({"a": make_adata(n_cells=20, seed=1), "b": make_adata(n_cells=10, seed=2)})
    calls = _calls(samples)
    del calls["b"]
    merged = _run(samples, calls)
    assert merged.sample_ids == ["a"]
    assert "b" not in set(merged.audit["sample_id"])


def test_exclude_drops_sample_after_merge(make_adata):
    samples = as_sample_map(
        {"a": make_adata(n_cells=30, seed=1), "b": make_adata(n_cells=20, seed=2), "c": make_adata(n_cells=25, seed=3)}
    )
    merged = _run(samples)
    before = dict(merged.sample_ranges)

    out = merged.exclude([SampleFailure("b", "sketch", "did not converge")])

    assert out.sample_ids == ["a", "c"]
    assert out.sample_ranges["c"] == before["c"]
    assert out.n_cells == merged.n_cells - merged.cells_per_sample()["b"]
    assert "b" not in set(out.cells["sample_id"])
    assert [(f.sample_id, f.stage) for f in out.failures] == [("b", "sketch")]

    b_rows = out.audit["sample_id"] == "b"
    assert out.audit.loc[b_rows, "global_index"].isna().all()
    assert (out.audit.loc[b_rows, "excluded_stage"] == "sketch").all()
    # every remaining global index belongs to a remaining sample range
    remaining = out.audit["global_index"].dropna().astype(int)
    covered = np.concatenate([np.arange(lo, hi) for lo, hi in out.sample_ranges.values()])
    assert sorted(remaining) == sorted(covered)
    # the original is untouched
    assert merged.sample_ids == ["a", "b", "c"]
    assert merged.audit.loc[merged.audit["sample_id"] == "b", "global_index"].notna().any()


def test_exclude_ignores_unknown_samples(make_adata):
    samples = as_sample_map({"a": make_adata(n_cells=20, seed=1)})
    merged = _run(samples)
    assert merged.exclude([SampleFailure("zz", "sketch", "x")]) is merged


# -------------------------------------------------------------------------
# Feature join
# -------------------------------------------------------------------------
def test_join_features():
    names = {"a": pd.Index(["x", "y", "z"]), "b": pd.Index(["z", "w", "x"])}
    assert list(join_features(names, "intersection")) == ["x", "z"]
    assert list(join_features(names, "union")) == ["w", "x", "y", "z"]
    with pytest.raises(ValueError):
        join_features({"a": pd.Index(["x", "x"])})


def test_union_pads_missing_features(make_adata):
    a = make_adata(n_cells=10, n_genes=3, gene_names=["x", "y", "z"], seed=1)
    b = make_adata(n_cells=8, n_genes=2, gene_names=["w", "x"], seed=2)
    samples = as_sample_map({"a": a, "b": b})

    merged = _run(samples, feature_join="union")
    assert list(merged.feature_names) == ["w", "x", "y", "z"]

    X = to_dense(merged.counts.read_rows(0, merged.n_cells))
    lo, hi = merged.sample_ranges["a"]
    kept_a = merged.cells.loc[merged.cells["sample_id"] == "a", "local_index"].to_numpy()
    np.testing.assert_allclose(X[lo:hi, 0], 0.0)
    np.testing.assert_allclose(X[lo:hi, 1:], a.X.toarray()[kept_a])

    lo, hi = merged.sample_ranges["b"]
    kept_b = merged.cells.loc[merged.cells["sample_id"] == "b", "local_index"].to_numpy()
    np.testing.assert_allclose(X[lo:hi, :2], b.X.toarray()[kept_b])
    np.testing.assert_allclose(X[lo:hi, 2:], 0.0)


def test_intersection_drops_private_features(make_adata):
    a = make_adata(n_cells=10, n_genes=3, gene_names=["x", "y", "z"], seed=1)
    b = make_adata(n_cells=8, n_genes=2, gene_names=["z", "x"], seed=2)
    merged = _run(as_sample_map({"a": a, "b": b}), feature_join="intersection")
    assert list(merged.feature_names) == ["x", "z"]
    assert merged.counts.n_cols == 2


# -------------------------------------------------------------------------
# zarr merge store
# -------------------------------------------------------------------------
def test_zarr_store_matches_in_memory(make_adata, tmp_path):
    samples = as_sample_map({"a": make_adata(n_cells=30, seed=1), "b": make_adata(n_cells=20, seed=2)})
    in_mem = _run(samples)
    on_disk = _run(samples, merge_store=tmp_path / "merged.zarr", block_size=8)

    assert isinstance(on_disk.counts, ZarrCSRMatrix)
    assert on_disk.counts.shape == in_mem.counts.shape
    np.testing.assert_allclose(
        to_dense(on_disk.counts.read_rows(5, in_mem.n_cells)),
        to_dense(in_mem.counts.read_rows(5, in_mem.n_cells)),
    )
