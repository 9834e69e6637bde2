# tests/test_sketch.py

from types import SimpleNamespace

import numpy as np
import pytest

from scsketch.blocked import as_blocked
from scsketch.errors import SampleFailure
from scsketch import sketch as sketch_mod
from scsketch.sketch import (
    LeverageSketchSampler,
    blocked_randomized_svd,
    leverage_scores,
    mixed_probabilities,
    sample_rng,
    sketch_sample,
)


def _low_rank(n=120, m=30, r=4, seed=0, noise=0.01):
    rng = np.random.default_rng(seed)
    return rng.normal(size=(n, r)) @ rng.normal(size=(r, m)) + noise * rng.normal(size=(n, m))


# -------------------------------------------------------------------------
# Factorization
# -------------------------------------------------------------------------
def test_randomized_svd_matches_exact_singular_values():
    X = _low_rank()
    U, s, n_iter = blocked_randomized_svd(
        as_blocked(X), 4, rng=np.random.default_rng(0), block_size=17, max_iter=25, tol=1e-8
    )
    exact = np.linalg.svd(X, compute_uv=False)[:4]
    np.testing.assert_allclose(s, exact, rtol=1e-6)
    assert U.shape == (120, 4)
    np.testing.assert_allclose(U.T @ U, np.eye(4), atol=1e-8)
    assert 1 <= n_iter <= 25


def test_default_settings_converge_on_noisy_counts():
    # flat noise spectrum past the top components, as in normalized scRNA data
    X = np.log1p(np.random.default_rng(5).poisson(1.0, size=(3000, 1000)).astype(float))
    sk = sketch_sample(as_blocked(X), sample_id="x", budget=500)

    assert sk.size == 500
    assert sk.rank == 50
    assert sk.n_iter <= 25


def test_oversampling_is_at_least_rank():
    X = np.random.default_rng(2).normal(size=(400, 120))
    seen = []
    A = as_blocked(X)
    real = A.matmul

    def matmul(other, block_size=None):
        seen.append(other.shape[1])
        return real(other, block_size)

    A.matmul = matmul
    blocked_randomized_svd(A, 30, rng=np.random.default_rng(0), oversample=5, max_iter=25, tol=1e-2)
    assert seen[0] == 60


def test_randomized_svd_non_convergence_is_sample_failure():
    X = np.random.default_rng(1).normal(size=(60, 40))
    with pytest.raises(SampleFailure) as exc:
        blocked_randomized_svd(
            as_blocked(X), 10, rng=np.random.default_rng(0), oversample=0, max_iter=1, tol=1e-15, sample_id="s7"
        )
    assert exc.value.sample_id == "s7"
    assert exc.value.stage == "sketch"


def test_randomized_svd_time_budget(monkeypatch):
    X = np.random.default_rng(1).normal(size=(60, 40))
    clock = iter(np.arange(0.0, 1000.0, 10.0))
    monkeypatch.setattr(sketch_mod, "time", SimpleNamespace(monotonic=lambda: next(clock)))
    with pytest.raises(SampleFailure, match="time budget"):
        blocked_randomized_svd(
            as_blocked(X), 10, rng=np.random.default_rng(0), oversample=0, max_iter=50, tol=1e-15, time_budget=5.0
        )


# -------------------------------------------------------------------------
# Leverage + probabilities
# -------------------------------------------------------------------------
def test_leverage_sums_to_rank():
    U, _ = np.linalg.qr(np.random.default_rng(0).normal(size=(50, 5)))
    lev, r = leverage_scores(U, np.array([5.0, 4.0, 3.0, 2.0, 1.0]))
    assert r == 5
    assert lev.sum() == pytest.approx(5.0)


def test_leverage_drops_zero_singular_values():
    U, _ = np.linalg.qr(np.random.default_rng(0).normal(size=(50, 3)))
    lev, r = leverage_scores(U, np.array([2.0, 0.0, 0.0]))
    assert r == 1
    np.testing.assert_allclose(lev, U[:, 0] ** 2)


def test_mixed_probabilities():
    lev = np.array([0.0, 1.0, 3.0, 0.0])
    q = mixed_probabilities(lev, 0.2)
    np.testing.assert_allclose(q, 0.8 * lev / 4 + 0.2 / 4)
    assert q.sum() == pytest.approx(1.0)
    assert (q > 0).all()


@pytest.mark.parametrize("alpha", [0.05, 0.3, 0.7, 0.95])
def test_mixed_probabilities_preserve_leverage_order(alpha):
    rng = np.random.default_rng(int(alpha * 100))
    for _ in range(20):
        lev = rng.exponential(size=200)
        lev[rng.choice(200, size=20, replace=False)] = 0.0
        q = mixed_probabilities(lev, alpha)
        order = np.argsort(lev, kind="stable")
        # larger leverage never gets a smaller probability
        assert (np.diff(q[order]) >= -1e-15).all()
        assert q.min() >= alpha / lev.size * (1 - 1e-12)


def test_zero_leverage_without_mixing_fails():
    with pytest.raises(SampleFailure):
        mixed_probabilities(np.zeros(10), 0.0, sample_id="s")
    np.testing.assert_allclose(mixed_probabilities(np.zeros(4), 0.5), 0.25)


# -------------------------------------------------------------------------
# sketch_sample
# -------------------------------------------------------------------------
def test_sketch_size_indices_and_weights():
    X = _low_rank()
    sk = sketch_sample(as_blocked(X), sample_id="s1", global_offset=1000, budget=30, rank=4, seed=3)

    assert sk.size == 30
    assert np.unique(sk.indices).size == 30
    assert (np.diff(sk.indices) > 0).all()
    assert sk.indices.min() >= 1000 and sk.indices.max() < 1120
    np.testing.assert_allclose(sk.weights, 1.0 / sk.probabilities)
    assert sk.leverage.shape == (120,)
    assert sk.rank == 4


def test_budget_larger_than_sample_takes_all():
    X = _low_rank(n=25)
    sk = sketch_sample(as_blocked(X), sample_id="s", budget=100, rank=3)
    np.testing.assert_array_equal(sk.indices, np.arange(25))


def test_sketch_is_deterministic_per_seed_and_sample():
    X = _low_rank()
    kw = dict(budget=40, rank=4, seed=11)
    a = sketch_sample(as_blocked(X), sample_id="s1", **kw)
    b = sketch_sample(as_blocked(X), sample_id="s1", **kw)
    c = sketch_sample(as_blocked(X), sample_id="s2", **kw)

    np.testing.assert_array_equal(a.indices, b.indices)
    np.testing.assert_array_equal(a.weights, b.weights)
    assert not np.array_equal(a.indices, c.indices)


def test_sample_rng_depends_on_sample_id():
    assert sample_rng(0, "a").integers(1 << 30) == sample_rng(0, "a").integers(1 << 30)
    assert sample_rng(0, "a").integers(1 << 30) != sample_rng(0, "b").integers(1 << 30)


def test_isolated_cells_get_high_leverage():
    X = _low_rank(n=300, m=20, noise=1e-3)
    # a handful of cells along a direction no other cell has
    X[:5] = 0
    X[:5, 0] = 50.0
    sk = sketch_sample(as_blocked(X), sample_id="s", budget=20, rank=6, mix_alpha=0.0)
    assert sk.leverage[:5].min() > 5 * np.median(sk.leverage[5:])


def test_empty_sample_fails():
    with pytest.raises(SampleFailure):
        sketch_sample(as_blocked(np.zeros((0, 4))), sample_id="s", budget=5)


# -------------------------------------------------------------------------
# Sampler fan-out
# -------------------------------------------------------------------------
def test_sampler_isolates_failing_sample(monkeypatch):
    X = np.vstack([_low_rank(n=50, seed=1), _low_rank(n=60, seed=2)])
    ranges = {"a": (0, 50), "b": (50, 110)}
    real = sketch_mod.sketch_sample

    def flaky(matrix, *, sample_id, **kwargs):
        if sample_id == "a":
            raise SampleFailure(sample_id, "sketch", "did not converge")
        return real(matrix, sample_id=sample_id, **kwargs)

    monkeypatch.setattr(sketch_mod, "sketch_sample", flaky)
    sketches, failures = LeverageSketchSampler(budget=10, rank=3, n_jobs=2).sample_all(as_blocked(X), ranges)

    assert list(sketches) == ["b"]
    assert sketches["b"].indices.min() >= 50
    assert [(f.sample_id, f.stage) for f in failures] == [("a", "sketch")]
