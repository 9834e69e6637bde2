# tests/test_metrics.py

import numpy as np
import pandas as pd
import scipy.sparse as sp
import anndata as ad
import pytest

from scsketch.metrics import METRIC_COLUMNS, MetricStore, compute_cell_metrics
from scsketch.samples import Sample, as_sample_map


def _tiny_sample():
    # 3 cells x 5 genes: MT-1, RPL3, HBB, g1, g2
    X = np.array(
        [
            [1, 1, 0, 2, 0],
            [0, 0, 0, 0, 0],
            [5, 0, 5, 0, 10],
        ],
        dtype=np.float32,
    )
    adata = ad.AnnData(
        X=sp.csr_matrix(X),
        obs=pd.DataFrame(index=["a", "b", "c"]),
        var=pd.DataFrame(index=["MT-1", "RPL3", "HBB", "g1", "g2"]),
    )
    return Sample("s1", adata)


@pytest.mark.parametrize("block_size", [1, 2, 100])
def test_metrics_values(block_size):
    df = compute_cell_metrics(_tiny_sample(), block_size=block_size)

    assert list(df.index) == [0, 1, 2]
    np.testing.assert_allclose(df["total_counts"], [4, 0, 20])
    np.testing.assert_array_equal(df["n_genes_by_counts"], [3, 0, 3])
    np.testing.assert_allclose(df["pct_counts_mt"], [25.0, 0.0, 25.0])
    np.testing.assert_allclose(df["pct_counts_ribo"], [25.0, 0.0, 0.0])
    np.testing.assert_allclose(df["pct_counts_hb"], [0.0, 0.0, 25.0])
    assert list(df["barcode"]) == ["a", "b", "c"]


def test_explicit_zeros_not_counted_as_genes():
    X = sp.csr_matrix(
        (np.array([0.0, 3.0]), np.array([0, 1]), np.array([0, 2])),
        shape=(1, 3),
    )
    adata = ad.AnnData(X=X, var=pd.DataFrame(index=["a", "b", "c"]))
    adata.obs_names = ["x"]
    df = compute_cell_metrics(Sample("s", adata))
    assert df["n_genes_by_counts"].iloc[0] == 1


def test_dense_and_sparse_agree(make_adata):
    a = make_adata(n_cells=50, n_genes=20, mt_genes=2, seed=3)
    dense = a.copy()
    dense.X = a.X.toarray()

    m_sparse = compute_cell_metrics(Sample("s", a), block_size=7)
    m_dense = compute_cell_metrics(Sample("s", dense), block_size=13)
    pd.testing.assert_frame_equal(m_sparse, m_dense, check_dtype=False)


def test_input_matrix_not_modified(make_adata):
    a = make_adata(n_cells=30, n_genes=10, seed=1)
    before = a.X.copy()
    compute_cell_metrics(Sample("s", a))
    assert (a.X != before).nnz == 0


def test_metric_store_mapping(make_adata):
    samples = as_sample_map({"b": make_adata(n_cells=20, seed=1), "a": make_adata(n_cells=30, seed=2)})
    store = MetricStore.from_samples(samples, n_jobs=2)

    assert list(store) == ["a", "b"]
    assert len(store) == 2
    assert len(store["a"]) == 30
    assert store.values_for("b", "total_counts").dtype == np.float64

    long = store.to_frame()
    assert len(long) == 50
    assert {"sample_id", "local_index", "barcode", *METRIC_COLUMNS} <= set(long.columns)


def test_metric_store_is_read_only(make_adata):
    store = MetricStore({"a": compute_cell_metrics(Sample("a", make_adata(n_cells=10)))})
    with pytest.raises(TypeError):
        store._tables["b"] = None
