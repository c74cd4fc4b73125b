# tests/test_downstream.py

import numpy as np
import pandas as pd
import pytest
import scipy.sparse as sp
import scanpy as sc
import anndata as ad

import scatlas.downstream as ds
from scatlas.config import DownstreamConfig
from scatlas.snapshots import initial_snapshot


# ----------------------------------------------------------------------
# Synthetic annotated dataset
# ----------------------------------------------------------------------
def annotated_adata(n_per_type=40, n_genes=60, seed=0):
    rng = np.random.default_rng(seed)
    types = np.repeat([0, 1], n_per_type)
    means = np.ones((2, n_genes))
    means[0, :10] = 20.0
    means[1, 10:20] = 20.0
    X = rng.poisson(means[types]).astype(np.float32)

    adata = ad.AnnData(
        X=sp.csr_matrix(X),
        obs=pd.DataFrame(
            {"cell_type": np.where(types == 0, "T", "B")},
            index=[f"c{i}" for i in range(len(types))],
        ),
        var=pd.DataFrame(index=[f"G{i}" for i in range(n_genes)]),
    )
    sc.pp.normalize_total(adata, target_sum=1e4)
    sc.pp.log1p(adata)
    adata.raw = adata
    return adata


def write_gmt(path, sets):
    path.write_text(
        "".join(f"{name}\tna\t" + "\t".join(genes) + "\n" for name, genes in sets.items())
    )
    return path


T_SET = [f"G{i}" for i in range(10)]
B_SET = [f"G{i}" for i in range(10, 20)]


def fake_ulm(mat, net, *, tmin=5):
    sources = sorted(net["source"].unique())
    scores = pd.DataFrame(
        np.arange(len(mat) * len(sources), dtype=float).reshape(len(mat), len(sources)),
        index=mat.index, columns=sources,
    )
    pvals = pd.DataFrame(0.01, index=mat.index, columns=sources)
    pvals.iloc[0, 0] = np.nan
    return scores, pvals


# ----------------------------------------------------------------------
# DE
# ----------------------------------------------------------------------
def test_de_per_cluster_filters_and_sorts():
    adata = annotated_adata()
    de = ds.de_per_cluster(adata, "cell_type", method="t-test", padj_cutoff=0.05, min_abs_log2fc=1.0)
    assert list(de.columns) == ds.DE_COLUMNS
    assert (de["pval_adj"] < 0.05).all()
    assert (de["log2_fold_change"].abs() >= 1.0).all()
    assert set(de.loc[(de["cluster"] == "T") & (de["log2_fold_change"] > 0), "gene"]) <= set(T_SET)
    assert de["cluster"].is_monotonic_increasing


# ----------------------------------------------------------------------
# Gene sets
# ----------------------------------------------------------------------
def test_load_gene_sets_merges_files(tmp_path):
    a = write_gmt(tmp_path / "a.gmt", {"T_SET": T_SET})
    b = write_gmt(tmp_path / "b.gmt", {"B_SET": B_SET})
    sets = ds.load_gene_sets([a, b])
    assert sorted(sets) == ["B_SET", "T_SET"]


def test_load_gene_sets_rejects_name_clash(tmp_path):
    a = write_gmt(tmp_path / "a.gmt", {"X": T_SET})
    b = write_gmt(tmp_path / "b.gmt", {"X": B_SET})
    with pytest.raises(ValueError, match="more than one GMT"):
        ds.load_gene_sets([a, b])


def test_load_gene_sets_dedupes_and_checks_path(tmp_path):
    a = write_gmt(tmp_path / "a.gmt", {"SET_A": ["G1", "G2", "G1"], "SET_B": ["G3", "G4"]})
    sets = ds.load_gene_sets([a])
    assert sets == {"SET_A": ["G1", "G2"], "SET_B": ["G3", "G4"]}

    with pytest.raises(FileNotFoundError):
        ds.load_gene_sets([tmp_path / "none.gmt"])


def test_filter_gene_sets_restricts_to_universe():
    sets = {"small": ["G1", "NOPE"], "ok": ["G1", "G2", "G3", "X"], "big": [f"G{i}" for i in range(10)]}
    out = ds.filter_gene_sets(sets, [f"G{i}" for i in range(60)], min_size=2, max_size=5)
    assert out == {"ok": ["G1", "G2", "G3"]}


def test_gene_sets_to_net():
    net = ds.gene_sets_to_net({"A": ["g1", "g2"], "B": ["g3"]})
    assert list(net.columns) == ["source", "target", "weight"]
    assert len(net) == 3
    assert (net["weight"] == 1.0).all()


def test_cluster_mean_expression_uses_raw():
    adata = annotated_adata()
    raw_x = adata.raw.X.toarray()
    adata = adata[:, :5].copy()
    mat = ds.cluster_mean_expression(adata, "cell_type")
    assert list(mat.index) == ["B", "T"]
    assert mat.shape[1] == 60
    np.testing.assert_allclose(mat.loc["T"].to_numpy(), raw_x[:40].mean(axis=0), rtol=1e-5)


# ----------------------------------------------------------------------
# Enrichment
# ----------------------------------------------------------------------
def test_enrichment_per_cluster_long_table(monkeypatch):
    monkeypatch.setattr(ds, "run_ulm", fake_ulm)
    adata = annotated_adata()
    out = ds.enrichment_per_cluster(adata, "cell_type", {"B_SET": B_SET, "T_SET": T_SET})

    assert list(out.columns) == ds.ENRICHMENT_COLUMNS
    assert len(out) == 4
    assert out["pval_adj"].isna().sum() == 1
    finite = out["pval_adj"].dropna()
    np.testing.assert_allclose(finite, 0.01)


def test_enrichment_without_gene_sets():
    out = ds.enrichment_per_cluster(annotated_adata(), "cell_type", {})
    assert out.empty
    assert list(out.columns) == ds.ENRICHMENT_COLUMNS


def test_run_ulm_validates_inputs():
    mat = pd.DataFrame([[1.0, 2.0]], columns=["a", "b"], index=["c0"])
    net = pd.DataFrame({"source": ["S"], "target": ["z"], "weight": [1.0]})
    with pytest.raises(ValueError):
        ds.run_ulm(pd.DataFrame(), net)
    with pytest.raises(ValueError):
        ds.run_ulm(mat, net.iloc[0:0])
    with pytest.raises(ValueError, match="no overlap"):
        ds.run_ulm(mat, net)


# ----------------------------------------------------------------------
# Module scores
# ----------------------------------------------------------------------
def test_score_column():
    assert ds.score_column("HALLMARK_E2F targets") == "score_HALLMARK_E2F_targets"
    assert ds.score_column("a/b") == "score_a_b"


def test_score_modules_and_summary():
    adata = annotated_adata()
    cols = ds.score_modules(adata, {"T_SET": T_SET, "B_SET": B_SET}, random_state=0)
    assert cols == ["score_T_SET", "score_B_SET"]

    summary = ds.summarize_module_scores(adata.obs, "cell_type", cols)
    assert list(summary.columns) == ds.MODULE_COLUMNS
    assert set(summary["gene_set"]) == {"T_SET", "B_SET"}
    assert (summary["n_cells"] == 40).all()

    s = summary.set_index(["cluster", "gene_set"])["mean_score"]
    assert s[("T", "T_SET")] > s[("B", "T_SET")]
    assert s[("B", "B_SET")] > s[("T", "B_SET")]


def test_score_modules_rejects_colliding_names():
    with pytest.raises(ValueError, match="duplicate score column"):
        ds.score_modules(annotated_adata(), {"a b": T_SET, "a_b": B_SET})


def test_summarize_module_scores_empty():
    assert ds.summarize_module_scores(pd.DataFrame({"g": ["a"]}), "g", []).empty


# ----------------------------------------------------------------------
# Stage
# ----------------------------------------------------------------------
def test_downstream_stage(tmp_path, monkeypatch):
    monkeypatch.setattr(ds, "run_ulm", fake_ulm)
    gmt = write_gmt(tmp_path / "sets.gmt", {"T_SET": T_SET, "B_SET": B_SET, "TINY": ["G1"]})
    cfg = DownstreamConfig(
        input_path=tmp_path / "in.h5ad",
        groupby="cell_type",
        de_method="t-test",
        gene_set_files=[gmt],
        gs_min_size=5,
        make_figures=False,
    )
    snap = initial_snapshot(annotated_adata(), "trajectory", {})

    new, de, enrichment, modules = ds.downstream_stage(snap, cfg)

    assert new.stage == "downstream"
    assert len(de) > 0
    assert set(enrichment["term"]) == {"T_SET", "B_SET"}
    assert set(modules["gene_set"]) == {"T_SET", "B_SET"}
    assert "score_T_SET" in new.adata.obs
    assert "score_T_SET" not in snap.adata.obs
    assert new.adata.uns["downstream"]["n_gene_sets"] == 2


def test_downstream_stage_missing_groupby(tmp_path):
    cfg = DownstreamConfig(input_path=tmp_path / "in.h5ad", groupby="leiden", make_figures=False)
    snap = initial_snapshot(annotated_adata(), "trajectory", {})
    with pytest.raises(KeyError):
        ds.downstream_stage(snap, cfg)
