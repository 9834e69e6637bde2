# tests/conftest.py

import numpy as np
import pandas as pd
import scipy.sparse as sp
import anndata as ad
import pytest

from scsketch.doublets import DOUBLET, SINGLET, PrecomputedDoubletClassifier


# -------------------------------------------------------------------------
# Synthetic AnnData Factory
# -------------------------------------------------------------------------
def synthetic_adata(
    n_cells=200,
    n_genes=60,
    seed=0,
    n_types=3,
    mt_genes=0,
    gene_names=None,
    sparse=True,
):
    """
    Poisson counts drawn from a few cell-type profiles, so the matrix has
    low-rank structure. The first ``mt_genes`` genes are named ``MT-*``.
    """
    rng = np.random.default_rng(seed)
    types = rng.integers(0, n_types, size=n_cells)
    profiles = rng.gamma(2.0, 1.0, size=(n_types, n_genes))
    depth = rng.uniform(0.5, 1.5, size=(n_cells, 1))
    X = rng.poisson(profiles[types] * depth).astype(np.float32)

    if gene_names is None:
        gene_names = [f"MT-{i}" for i in range(mt_genes)] + [f"g{i}" for i in range(n_genes - mt_genes)]

    adata = ad.AnnData(
        X=sp.csr_matrix(X) if sparse else X,
        obs=pd.DataFrame(
            {"cell_type": pd.Categorical(types.astype(str))},
            index=[f"c{seed}_{i}" for i in range(n_cells)],
        ),
        var=pd.DataFrame(index=list(gene_names)),
    )
    return adata


def doublet_table(n_cells, n_doublets, seed=0):
    """Calls with exactly ``n_doublets`` doublets at random positions."""
    rng = np.random.default_rng(seed)
    labels = np.full(n_cells, SINGLET, dtype=object)
    labels[rng.choice(n_cells, size=n_doublets, replace=False)] = DOUBLET
    scores = np.where(labels == DOUBLET, 0.9, 0.05)
    return pd.DataFrame({"doublet_label": labels, "doublet_score": scores})


@pytest.fixture
def make_adata():
    return synthetic_adata


@pytest.fixture
def make_doublets():
    return doublet_table


@pytest.fixture
def no_doublets():
    """Classifier that calls every cell a singlet."""
    return PrecomputedDoubletClassifier({})


@pytest.fixture
def mock_scrublet(monkeypatch):
    # Scanpy Scrublet modifies adata in-place; mock with deterministic scores
    def fake_scrublet(adata, *args, **kwargs):
        adata.obs["doublet_score"] = np.linspace(0.0, 1.0, adata.n_obs)
        adata.obs["predicted_doublet"] = False
        return adata

    monkeypatch.setattr("scanpy.pp.scrublet", fake_scrublet)
    return True


# -------------------------------------------------------------------------
# Batches sharing cell types
# -------------------------------------------------------------------------
def clustered_batches(sizes, n_features=40, n_types=3, seed=0, batch_scale=0.5):
    """
    Dense log-like expression for several batches drawn from the same cell-type
    centroids. Each batch gets its own per-feature scaling and shift.
    Returns ``{sample_id: (X, labels)}``.
    """
    rng = np.random.default_rng(seed)
    centroids = rng.normal(0.0, 3.0, size=(n_types, n_features))
    out = {}
    for sid, n in sizes.items():
        labels = rng.integers(0, n_types, size=n)
        scale = 1.0 + batch_scale * rng.uniform(-0.5, 0.5, size=n_features)
        shift = batch_scale * rng.normal(size=n_features)
        X = (centroids[labels] + rng.normal(0.0, 0.5, size=(n, n_features))) * scale + shift
        out[sid] = (X, labels)
    return out


@pytest.fixture
def make_batches():
    return clustered_batches
