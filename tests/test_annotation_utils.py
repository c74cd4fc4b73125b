# tests/test_annotation_utils.py

import numpy as np
import pandas as pd
import pytest
import scipy.sparse as sp
import scanpy as sc
import anndata as ad

from scatlas import annotation_utils as au


# ----------------------------------------------------------------------
# Synthetic data: two types with distinct marker blocks
# ----------------------------------------------------------------------
def two_type_adata(n_per_type=40, n_genes=60, seed=0, lognorm=True):
    rng = np.random.default_rng(seed)
    means = np.ones((2, n_genes))
    means[0, :15] = 20.0
    means[1, 15:30] = 20.0
    types = np.repeat([0, 1], n_per_type)
    X = rng.poisson(means[types]).astype(np.float32)

    adata = ad.AnnData(
        X=sp.csr_matrix(X),
        obs=pd.DataFrame(
            {"cell_type": pd.Categorical(np.where(types == 0, "Tcell", "Bcell"))},
            index=[f"c{i}" for i in range(len(types))],
        ),
        var=pd.DataFrame(index=[f"G{i}" for i in range(n_genes)]),
    )
    if lognorm:
        sc.pp.normalize_total(adata, target_sum=1e4)
        sc.pp.log1p(adata)
    return adata


# ----------------------------------------------------------------------
# Markers
# ----------------------------------------------------------------------
def test_compute_cluster_markers_table():
    adata = two_type_adata()
    markers = au.compute_cluster_markers(adata, "cell_type", method="t-test", top_n=5)
    assert list(markers.columns) == au.MARKER_COLUMNS
    assert set(markers["cluster"]) == {"Tcell", "Bcell"}
    assert (markers.groupby("cluster").size() == 5).all()

    top_t = markers[markers["cluster"] == "Tcell"]["gene"]
    assert all(int(g[1:]) < 15 for g in top_t)


def test_compute_cluster_markers_needs_two_groups():
    adata = two_type_adata()
    adata.obs["one"] = "x"
    with pytest.raises(ValueError):
        au.compute_cluster_markers(adata, "one")
    with pytest.raises(KeyError):
        au.compute_cluster_markers(adata, "missing")


# ----------------------------------------------------------------------
# Reference correlation
# ----------------------------------------------------------------------
def test_reference_profiles_from_counts():
    ref = two_type_adata(seed=1, lognorm=False)
    profiles = au.reference_profiles(ref, "cell_type", n_genes=15)
    assert list(profiles.columns) == ["Bcell", "Tcell"]
    assert profiles.shape[0] <= 30
    assert profiles.loc["G0", "Tcell"] > profiles.loc["G0", "Bcell"]


def test_correlate_to_reference_recovers_types():
    ref = two_type_adata(seed=1)
    query = two_type_adata(seed=2)
    profiles = au.reference_profiles(ref, "cell_type", n_genes=15)

    res = au.correlate_to_reference(query, profiles, min_delta=0.05, min_genes=5)
    assert list(res.columns) == ["label", "score", "delta"]
    assert list(res.index) == list(query.obs_names)
    agree = (res["label"] == query.obs["cell_type"].astype(str)).mean()
    assert agree > 0.95


def test_correlate_to_reference_marks_ambiguous():
    ref = two_type_adata(seed=1)
    query = two_type_adata(seed=2)
    profiles = au.reference_profiles(ref, "cell_type", n_genes=15)
    res = au.correlate_to_reference(query, profiles, min_delta=5.0, min_genes=5)
    assert (res["label"] == au.AMBIGUOUS).all()


def test_correlate_to_reference_gene_overlap():
    query = two_type_adata()
    profiles = pd.DataFrame({"A": [1.0, 2.0], "B": [2.0, 1.0]}, index=["X1", "X2"])
    with pytest.raises(ValueError, match="reference marker genes"):
        au.correlate_to_reference(query, profiles)


def test_cluster_majority_labels():
    labels = pd.Series(["T", "T", "B", au.AMBIGUOUS, au.AMBIGUOUS, "B"])
    clusters = pd.Series(["0", "0", "0", "1", "1", "2"])
    maj = au.cluster_majority_labels(labels, clusters)
    assert maj.to_dict() == {"0": "T", "1": au.AMBIGUOUS, "2": "B"}


def test_cluster_majority_labels_ties_resolve_by_label():
    clusters = pd.Series(["0"] * 4)
    first = au.cluster_majority_labels(pd.Series(["T", "B", "T", "B"]), clusters)
    second = au.cluster_majority_labels(pd.Series(["B", "T", "B", "T"]), clusters)
    assert first["0"] == second["0"] == "B"


# ----------------------------------------------------------------------
# Manual labels
# ----------------------------------------------------------------------
def test_read_annotation_csv(tmp_path):
    p = tmp_path / "ann.csv"
    p.write_text("cluster,label\n0, T cells \n1,B cells\n2,\n")
    assert au.read_annotation_csv(p) == {"0": "T cells", "1": "B cells", "2": ""}


def test_read_annotation_csv_rejects_duplicates(tmp_path):
    p = tmp_path / "ann.csv"
    p.write_text("cluster,label\n0,T\n0,B\n")
    with pytest.raises(ValueError, match="more than one label"):
        au.read_annotation_csv(p)


def test_read_annotation_csv_missing_columns(tmp_path):
    p = tmp_path / "ann.csv"
    p.write_text("cluster,name\n0,T\n")
    with pytest.raises(KeyError):
        au.read_annotation_csv(p)
    with pytest.raises(FileNotFoundError):
        au.read_annotation_csv(tmp_path / "none.csv")


def test_apply_manual_labels_keeps_unmapped_ids():
    clusters = pd.Series(["0", "1", "2", "0"])
    out = au.apply_manual_labels(clusters, {"0": "T", "1": "", "9": "X"})
    assert out.tolist() == ["T", "1", "2", "T"]


def test_run_celltypist_uses_majority_vote(monkeypatch):
    import celltypist

    adata = two_type_adata()
    adata.obs["leiden"] = np.where(adata.obs["cell_type"] == "Tcell", "0", "1")

    class Preds:
        def __init__(self, idx):
            self.predicted_labels = pd.DataFrame(
                {"predicted_labels": "T", "majority_voting": "MV"}, index=idx
            )

    monkeypatch.setattr(au, "_load_celltypist_model", lambda name: object())
    monkeypatch.setattr(
        celltypist, "annotate", lambda q, model, majority_voting, over_clustering: Preds(q.obs_names)
    )
    out = au.run_celltypist(adata, "Immune_All_Low", over_clustering="leiden")
    assert (out == "MV").all()
    assert list(out.index) == list(adata.obs_names)
