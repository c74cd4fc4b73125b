import warnings

import numpy as np
import pandas as pd
import pytest
import scipy.sparse as sp

from scatlas.doublet_utils import (
    DEFAULT_PK_GRID,
    DEFAULT_PN_GRID,
    DOUBLET,
    MULTIPLET_RATE_TABLE,
    SINGLET,
    DoubletComputationError,
    DoubletConfigurationError,
    DoubletParams,
    PCSelectionWarning,
    _drop_self,
    bimodality_coefficient,
    classify_doublets,
    compute_bcmvn,
    detect_doublets,
    expected_doublet_count,
    homotypic_proportion,
    lookup_multiplet_rate,
    n_synthetic_doublets,
    select_n_pcs,
    select_optimal_pk,
    synthesize_doublets,
)


# ----------------------------------------------------------------------
# Synthetic data generator
# ----------------------------------------------------------------------
def synthetic_counts(n_cells=600, n_genes=200, n_types=3, seed=0):
    """Poisson counts for a few cell types, each with its own block of marker genes."""
    rng = np.random.default_rng(seed)
    base = rng.gamma(2.0, 0.5, size=n_genes)
    means = np.tile(base, (n_types, 1))
    block = n_genes // (n_types + 1)
    for t in range(n_types):
        means[t, t * block:(t + 1) * block] *= 8.0

    types = rng.integers(0, n_types, size=n_cells)
    lib = rng.uniform(0.5, 1.5, size=n_cells)
    X = rng.poisson(means[types] * lib[:, None]).astype(np.float32)
    ids = [f"cell{i:04d}" for i in range(n_cells)]
    return sp.csr_matrix(X), ids


SMALL_PARAMS = DoubletParams(
    pN_grid=(0.15, 0.25),
    pK_grid=(0.01, 0.05, 0.1),
    n_top_genes=150,
    max_pcs=15,
)


# ----------------------------------------------------------------------
# Multiplet rate + expected counts
# ----------------------------------------------------------------------
def test_lookup_multiplet_rate_bins():
    assert lookup_multiplet_rate(500) == pytest.approx(0.004)
    assert lookup_multiplet_rate(2999) == pytest.approx(0.016)
    assert lookup_multiplet_rate(3000) == pytest.approx(0.023)
    assert lookup_multiplet_rate(25_000) == pytest.approx(0.076)


def test_lookup_multiplet_rate_is_monotone():
    rates = [lookup_multiplet_rate(n) for n in range(500, 12_001, 250)]
    assert all(a <= b for a, b in zip(rates, rates[1:]))
    assert rates[-1] == MULTIPLET_RATE_TABLE[-1][1]


def test_lookup_multiplet_rate_below_table_raises():
    with pytest.raises(DoubletConfigurationError):
        lookup_multiplet_rate(200)


def test_expected_doublet_count_rounds_twice():
    assert expected_doublet_count(3000, 0.023, 0.1) == (69, 62)


def test_homotypic_proportion():
    assert homotypic_proportion(["a", "a", "b", "b"]) == pytest.approx(0.5)
    assert homotypic_proportion(["a"] * 5) == pytest.approx(1.0)
    with pytest.raises(DoubletComputationError):
        homotypic_proportion([])


# ----------------------------------------------------------------------
# PC selection
# ----------------------------------------------------------------------
KNEE_CURVE = [38, 18, 10, 7, 5.5, 4.5, 3, 2, 1.5] + [0.9 - 0.05 * i for i in range(11)]


def test_select_n_pcs_knee_curve():
    with warnings.catch_warnings():
        warnings.simplefilter("error", PCSelectionWarning)
        sel = select_n_pcs(KNEE_CURVE)
    assert sel.by_cumulative == 10
    assert sel.by_difference == 10
    assert sel.n_pcs == 10
    assert not sel.used_fallback


def test_select_n_pcs_is_idempotent():
    assert select_n_pcs(KNEE_CURVE) == select_n_pcs(list(KNEE_CURVE))


def test_select_n_pcs_takes_minimum():
    pct = [60, 25, 6, 4.8, 4.0, 0.1, 0.1]
    sel = select_n_pcs(pct)
    assert sel.by_cumulative == 4
    assert sel.by_difference == 6
    assert sel.n_pcs == 4


def test_select_n_pcs_fallback_warns():
    flat = [10.0] * 10
    with pytest.warns(PCSelectionWarning):
        sel = select_n_pcs(flat, fallback=7)
    assert sel.used_fallback
    assert sel.by_cumulative is None
    assert sel.by_difference is None
    assert sel.n_pcs == 7


def test_select_n_pcs_rejects_empty():
    with pytest.raises(ValueError):
        select_n_pcs([])


# ----------------------------------------------------------------------
# Synthetic doublets + neighbours
# ----------------------------------------------------------------------
def test_n_synthetic_doublets():
    assert n_synthetic_doublets(750, 0.25) == 250
    assert n_synthetic_doublets(600, 0.05) == 32


def test_synthesize_doublets_averages_pairs():
    X = sp.csr_matrix(np.tile([[2.0, 4.0, 0.0]], (5, 1)))
    out = synthesize_doublets(X, 8, np.random.default_rng(0))
    assert out.shape == (8, 3)
    np.testing.assert_allclose(out.toarray(), np.tile([[2.0, 4.0, 0.0]], (8, 1)))


def test_drop_self_skips_query_cell():
    idx = np.array([[0, 3, 2], [2, 1, 0], [1, 0, 2]])
    out = _drop_self(idx, 2)
    np.testing.assert_array_equal(out, [[3, 2], [2, 0], [1, 0]])


# ----------------------------------------------------------------------
# Bimodality + pK choice
# ----------------------------------------------------------------------
def test_bimodality_coefficient_degenerate_inputs():
    assert np.isnan(bimodality_coefficient([0.1, 0.2, 0.3]))
    assert np.isnan(bimodality_coefficient([0.5] * 20))


def test_bimodality_coefficient_separates_shapes():
    rng = np.random.default_rng(1)
    unimodal = rng.normal(0, 1, 2000)
    bimodal = np.concatenate([rng.normal(-3, 0.5, 1000), rng.normal(3, 0.5, 1000)])
    assert bimodality_coefficient(bimodal) > 5 / 9 > bimodality_coefficient(unimodal)


def test_compute_bcmvn_mean_over_variance():
    sweep = pd.DataFrame(
        {
            "pN": [0.1, 0.2, 0.1, 0.2],
            "pK": [0.01, 0.01, 0.05, 0.05],
            "bimodality": [0.4, 0.6, 0.5, 0.7],
        }
    )
    out = compute_bcmvn(sweep)
    assert list(out.index) == [0.01, 0.05]
    assert out.loc[0.01, "bcmvn"] == pytest.approx(0.5 / 0.02)
    assert out.loc[0.05, "bcmvn"] == pytest.approx(0.6 / 0.02)


def test_compute_bcmvn_single_pn_uses_mean():
    sweep = pd.DataFrame({"pN": 0.25, "pK": [0.01, 0.05], "bimodality": [0.3, 0.8]})
    out = compute_bcmvn(sweep)
    np.testing.assert_allclose(out["bcmvn"], [0.3, 0.8])
    assert select_optimal_pk(out) == 0.05


def test_compute_bcmvn_fallback_is_per_pk():
    # pK 0.0005 only keeps a neighbour at the largest pN
    sweep = pd.DataFrame(
        {
            "pN": [0.25, 0.30, 0.25, 0.30, 0.30],
            "pK": [0.02, 0.02, 0.05, 0.05, 0.0005],
            "bimodality": [0.55, 0.56, 0.40, 0.44, 0.52],
        }
    )
    out = compute_bcmvn(sweep)

    assert np.isnan(out.loc[0.0005, "var_bc"])
    assert out.loc[0.0005, "bcmvn"] == pytest.approx(0.52)
    for pk in (0.02, 0.05):
        row = out.loc[pk]
        assert row["bcmvn"] == pytest.approx(row["mean_bc"] / row["var_bc"])
    assert select_optimal_pk(out) == 0.02


def test_select_optimal_pk_ties_to_smaller():
    bcmvn = pd.DataFrame({"bcmvn": [2.0, 5.0, 5.0]}, index=[0.01, 0.02, 0.03])
    assert select_optimal_pk(bcmvn) == 0.02


def test_select_optimal_pk_all_nan_raises():
    bcmvn = pd.DataFrame({"bcmvn": [np.nan, np.nan]}, index=[0.01, 0.02])
    with pytest.raises(DoubletComputationError):
        select_optimal_pk(bcmvn)


# ----------------------------------------------------------------------
# Classification
# ----------------------------------------------------------------------
def test_classify_doublets_top_n():
    calls = classify_doublets([0.1, 0.9, 0.5, 0.7], ["a", "b", "c", "d"], 2)
    assert list(calls) == [SINGLET, DOUBLET, SINGLET, DOUBLET]


def test_classify_doublets_tie_break_by_cell_id():
    calls = classify_doublets([0.5, 0.5, 0.1], ["c", "a", "b"], 1)
    assert list(calls) == [SINGLET, DOUBLET, SINGLET]


def test_classify_doublets_clamps_count():
    assert (classify_doublets([0.2, 0.3], ["a", "b"], 10) == DOUBLET).all()
    assert (classify_doublets([0.2, 0.3], ["a", "b"], 0) == SINGLET).all()


# ----------------------------------------------------------------------
# End to end
# ----------------------------------------------------------------------
def test_default_grids():
    assert DEFAULT_PN_GRID[0] == 0.05 and DEFAULT_PN_GRID[-1] == 0.30
    assert DEFAULT_PK_GRID[:3] == (0.0005, 0.001, 0.005)
    assert DEFAULT_PK_GRID[-1] == 0.30


def test_detect_doublets_requires_rate_for_small_samples():
    counts, ids = synthetic_counts(n_cells=200)
    with pytest.raises(DoubletConfigurationError):
        detect_doublets(counts, ids, SMALL_PARAMS, random_state=0)


def test_detect_doublets_rejects_bad_inputs():
    counts, ids = synthetic_counts(n_cells=50)
    with pytest.raises(DoubletConfigurationError):
        detect_doublets(counts, ids, SMALL_PARAMS, multiplet_rate=1.5, random_state=0)
    with pytest.raises(ValueError):
        detect_doublets(counts, ids[:-1], SMALL_PARAMS, multiplet_rate=0.05, random_state=0)
    with pytest.raises(ValueError):
        detect_doublets(counts, ["x"] * 50, SMALL_PARAMS, multiplet_rate=0.05, random_state=0)


def test_detect_doublets_end_to_end():
    counts, ids = synthetic_counts(n_cells=600)
    res = detect_doublets(
        counts, ids, SMALL_PARAMS, sample="S1", multiplet_rate=0.05, random_state=7
    )
    s = res.summary

    assert list(res.labels.index) == ids
    assert set(res.labels["doublet_call"].cat.categories) == {SINGLET, DOUBLET}
    assert res.labels["pANN"].between(0, 1).all()

    assert s.sample == "S1"
    assert s.rate_source == "configured"
    assert s.n_expected == 30
    assert s.n_expected_adjusted == int(round(30 * (1 - s.homotypic_proportion)))
    assert s.n_called == s.n_expected_adjusted
    assert (res.labels["doublet_call"] == DOUBLET).sum() == s.n_called

    assert s.optimal_pK in SMALL_PARAMS.pK_grid
    assert len(res.sweep) == len(SMALL_PARAMS.pN_grid) * len(SMALL_PARAMS.pK_grid)
    assert list(res.bcmvn.columns) == ["mean_bc", "var_bc", "bcmvn"]


def test_detect_doublets_is_reproducible_with_seed():
    counts, ids = synthetic_counts(n_cells=520, seed=3)
    a = detect_doublets(counts, ids, SMALL_PARAMS, multiplet_rate=0.04, random_state=11)
    b = detect_doublets(counts, ids, SMALL_PARAMS, multiplet_rate=0.04, random_state=11)
    pd.testing.assert_frame_equal(a.labels, b.labels)
    assert a.summary.optimal_pK == b.summary.optimal_pK
    assert a.summary.n_called == b.summary.n_called


def test_detect_doublets_calls_are_top_pann():
    counts, ids = synthetic_counts(n_cells=600, seed=5)
    res = detect_doublets(counts, ids, SMALL_PARAMS, multiplet_rate=0.05, random_state=2)
    labels = res.labels
    n = res.summary.n_called

    ranked = labels.assign(cell=labels.index).sort_values(
        ["pANN", "cell"], ascending=[False, True]
    )
    expected = set(ranked.index[:n])
    called = set(labels.index[labels["doublet_call"] == DOUBLET])
    assert n > 0
    assert called == expected
