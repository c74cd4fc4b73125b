# tests/test_process_and_integrate.py

import numpy as np
import pandas as pd
import pytest
import scipy.sparse as sp
import anndata as ad

import scatlas.process_and_integrate as pi
from scatlas.config import ProcessAndIntegrateConfig
from scatlas.snapshots import initial_snapshot


# -----------------------------------------------------------------------------
# Synthetic counts: two batches, three cell types
# -----------------------------------------------------------------------------
def synthetic_counts(n_cells=150, n_genes=120, seed=0):
    rng = np.random.default_rng(seed)
    types = rng.integers(0, 3, size=n_cells)
    means = np.full((3, n_genes), 1.0)
    for t in range(3):
        means[t, t * 30:(t + 1) * 30] = 10.0
    X = rng.poisson(means[types]).astype(np.float32)

    adata = ad.AnnData(
        X=sp.csr_matrix(X),
        obs=pd.DataFrame(
            {
                "sample_id": pd.Categorical(np.where(np.arange(n_cells) % 2, "S1", "S2")),
                "true_type": types.astype(str),
            },
            index=[f"c{i}" for i in range(n_cells)],
        ),
        var=pd.DataFrame(index=[f"g{i}" for i in range(n_genes)]),
    )
    adata.layers["counts"] = adata.X.copy()
    return adata


def make_cfg(tmp_path, **kw):
    params = dict(
        input_path=tmp_path / "in.h5ad",
        n_top_genes=60,
        max_pcs=10,
        n_pcs=5,
        n_neighbors=10,
        method="none",
        make_figures=False,
    )
    params.update(kw)
    return ProcessAndIntegrateConfig(**params)

# -----------------------------------------------------------------------------
# Normalization + PCA
# -----------------------------------------------------------------------------
def test_normalize_and_hvg_keeps_raw_and_counts():
    adata = synthetic_counts()
    pi.normalize_and_hvg(
        adata, counts_layer="counts", target_sum=1e4, n_top_genes=60, batch_key=None
    )
    assert adata.raw is not None
    assert adata.var["highly_variable"].sum() == 60
    np.testing.assert_allclose(np.expm1(adata.X.toarray()).sum(axis=1), 1e4, rtol=1e-3)
    assert adata.layers["counts"].max() >= 10


def test_normalize_and_hvg_missing_layer():
    with pytest.raises(KeyError):
        pi.normalize_and_hvg(
            synthetic_counts(), counts_layer="spliced", target_sum=1e4,
            n_top_genes=60, batch_key=None,
        )


def test_scaled_pca_leaves_x_unscaled():
    adata = synthetic_counts()
    pi.normalize_and_hvg(
        adata, counts_layer="counts", target_sum=1e4, n_top_genes=60, batch_key=None
    )
    before = adata.X.copy()
    pi.scaled_pca(adata, max_pcs=8, scale_max_value=10.0, random_state=0)
    assert adata.obsm["X_pca"].shape == (adata.n_obs, 8)
    assert len(adata.uns["pca"]["variance_ratio"]) == 8
    assert (adata.X != before).nnz == 0


def test_choose_n_pcs_fixed_and_heuristic(tmp_path):
    adata = synthetic_counts()
    adata.uns["pca"] = {"variance_ratio": np.array([0.6, 0.25, 0.06, 0.048, 0.04, 0.001, 0.001])}

    fixed = pi.choose_n_pcs(adata, make_cfg(tmp_path, n_pcs=20))
    assert fixed.n_pcs == 7

    cfg = make_cfg(tmp_path).model_copy(update={"n_pcs": None})
    chosen = pi.choose_n_pcs(adata, cfg)
    assert chosen.n_pcs == 4


# -----------------------------------------------------------------------------
# Integration dispatch
# -----------------------------------------------------------------------------
def _with_pca(adata):
    rng = np.random.default_rng(1)
    adata.obsm["X_pca"] = rng.normal(size=(adata.n_obs, 10)).astype(np.float32)
    return adata


def test_integrate_none_uses_pca():
    adata = _with_pca(synthetic_counts())
    pi.integrate(
        adata, method="none", batch_key="sample_id", n_pcs=5,
        counts_layer="counts", n_neighbors=10, random_state=0,
    )
    np.testing.assert_allclose(adata.obsm[pi.INTEGRATED_KEY], adata.obsm["X_pca"][:, :5])
    assert "connectivities" in adata.obsp
    assert adata.uns["integration"]["method"] == "none"


def test_integrate_single_batch_skips_method(monkeypatch):
    adata = _with_pca(synthetic_counts())
    adata.obs["sample_id"] = "S1"

    def boom(*a, **k):
        raise AssertionError("harmony must not run on one batch")

    monkeypatch.setattr(pi, "_run_harmony", boom)
    pi.integrate(
        adata, method="harmony", batch_key="sample_id", n_pcs=5,
        counts_layer="counts", n_neighbors=10, random_state=0,
    )
    assert adata.uns["integration"]["method"] == "none"


def test_integrate_dispatches_harmony(monkeypatch):
    adata = _with_pca(synthetic_counts())
    fake = np.ones((adata.n_obs, 5), dtype=np.float32)
    fake[:, 0] = np.arange(adata.n_obs)
    monkeypatch.setattr(pi, "_run_harmony", lambda a, b, n, r: fake)

    pi.integrate(
        adata, method="harmony", batch_key="sample_id", n_pcs=5,
        counts_layer="counts", n_neighbors=10, random_state=0,
    )
    np.testing.assert_array_equal(adata.obsm[pi.INTEGRATED_KEY], fake)
    assert adata.uns["integration"]["method"] == "harmony"


def test_scanorama_reads_returned_objects(monkeypatch):
    import scanorama

    adata = _with_pca(synthetic_counts())
    adata.var["highly_variable"] = True

    def fake_correct(adatas, return_dimred, dimred, verbose):
        out = []
        for sub in adatas:
            new = ad.AnnData(X=sub.X.copy(), obs=sub.obs.copy())
            new.obsm["X_scanorama"] = np.full((sub.n_obs, dimred), 7.0, dtype=np.float32)
            out.append(new)
        return out

    monkeypatch.setattr(scanorama, "correct_scanpy", fake_correct)
    Z = pi._run_scanorama(adata, "sample_id", 5)
    np.testing.assert_array_equal(Z, np.full((adata.n_obs, 5), 7.0, dtype=np.float32))


def test_integrate_scanorama_corrects_embedding():
    adata = synthetic_counts()
    pi.normalize_and_hvg(
        adata, counts_layer="counts", target_sum=1e4, n_top_genes=60, batch_key=None
    )
    pi.scaled_pca(adata, max_pcs=10, scale_max_value=10.0, random_state=0)
    pi.integrate(
        adata, method="scanorama", batch_key="sample_id", n_pcs=5,
        counts_layer="counts", n_neighbors=10, random_state=0,
    )
    Z = adata.obsm[pi.INTEGRATED_KEY]
    assert Z.shape == (adata.n_obs, 5)
    assert np.isfinite(Z).all()
    assert not np.allclose(Z, adata.obsm["X_pca"][:, :5])
    assert adata.uns["integration"]["method"] == "scanorama"


def test_integrate_unknown_method():
    adata = _with_pca(synthetic_counts())
    with pytest.raises(ValueError):
        pi.integrate(
            adata, method="magic", batch_key="sample_id", n_pcs=5,
            counts_layer="counts", n_neighbors=10, random_state=0,
        )


def test_scvi_epochs_and_oom_detection():
    assert pi._auto_scvi_epochs(1_000) == 80
    assert pi._auto_scvi_epochs(100_000) == 60
    assert pi._auto_scvi_epochs(500_000) == 40
    assert pi._is_oom_error(RuntimeError("CUDA out of memory"))
    assert not pi._is_oom_error(RuntimeError("shape mismatch"))


# -----------------------------------------------------------------------------
# Stage
# -----------------------------------------------------------------------------
def test_process_and_integrate_stage(tmp_path):
    snap = initial_snapshot(synthetic_counts(), "find_doublets", {})
    before = snap.adata.X.copy()

    new = pi.process_and_integrate_stage(snap, make_cfg(tmp_path))
    adata = new.adata

    assert (snap.adata.X != before).nnz == 0
    assert new.stage == "process_and_integrate"
    assert adata.uns["n_pcs"] == 5
    assert adata.uns["batch_key"] == "sample_id"
    assert adata.obsm[pi.INTEGRATED_KEY].shape == (adata.n_obs, 5)
    assert adata.obsm["X_umap"].shape == (adata.n_obs, 2)
    assert adata.obsm["X_umap_unintegrated"].shape == (adata.n_obs, 2)
    assert "counts" in adata.layers
