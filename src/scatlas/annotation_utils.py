from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Optional

import anndata as ad
import numpy as np
import pandas as pd
import scanpy as sc
import scipy.sparse as sp
from scipy.stats import rankdata

LOGGER = logging.getLogger(__name__)

AMBIGUOUS = "ambiguous"
MARKER_COLUMNS = ["cluster", "gene", "log2_fold_change", "pval", "pval_adj", "score"]
_CHUNK = 5000


# -------------------------------------------------------------------------
# Markers
# -------------------------------------------------------------------------
def compute_cluster_markers(
    adata: ad.AnnData,
    groupby: str,
    *,
    method: str = "wilcoxon",
    top_n: Optional[int] = 100,
) -> pd.DataFrame:
    """
    One-vs-rest marker genes per group on log-normalized expression
    (adata.raw when present). Returns a long table with MARKER_COLUMNS.
    """
    if groupby not in adata.obs:
        raise KeyError(f"groupby '{groupby}' not found in adata.obs")
    if adata.obs[groupby].nunique() < 2:
        raise ValueError(f"Need at least two groups in '{groupby}' for marker genes")

    key = f"rank_genes_{groupby}"
    sc.tl.rank_genes_groups(
        adata,
        groupby=groupby,
        method=method,
        use_raw=adata.raw is not None,
        key_added=key,
    )
    df = sc.get.rank_genes_groups_df(adata, group=None, key=key)
    if "group" not in df.columns:
        # single group returned without a group column
        df.insert(0, "group", adata.obs[groupby].astype(str).unique()[0])

    out = pd.DataFrame(
        {
            "cluster": df["group"].astype(str),
            "gene": df["names"].astype(str),
            "log2_fold_change": df.get("logfoldchanges", pd.Series(np.nan, index=df.index)),
            "pval": df.get("pvals", pd.Series(np.nan, index=df.index)),
            "pval_adj": df.get("pvals_adj", pd.Series(np.nan, index=df.index)),
            "score": df["scores"],
        }
    )
    if top_n is not None:
        out = out.groupby("cluster", sort=False, observed=True).head(top_n)
    return out.reset_index(drop=True)[MARKER_COLUMNS]


# -------------------------------------------------------------------------
# Reference correlation label transfer
# -------------------------------------------------------------------------
def _expression(adata: ad.AnnData, genes) -> np.ndarray:
    src = adata.raw.to_adata() if adata.raw is not None else adata
    X = src[:, list(genes)].X
    return X.toarray() if sp.issparse(X) else np.asarray(X)


def _looks_like_counts(X) -> bool:
    vals = X.data if sp.issparse(X) else np.asarray(X).ravel()
    if vals.size == 0:
        return False
    sample = vals[: min(vals.size, 10000)]
    return bool(np.all(np.equal(np.mod(sample, 1), 0)) and sample.max() > 20)


def reference_profiles(
    ref: ad.AnnData,
    label_key: str,
    *,
    n_genes: int = 50,
) -> pd.DataFrame:
    """
    Mean log-expression per reference label over the union of the top
    `n_genes` markers of each label. Returns genes x labels.
    """
    if label_key not in ref.obs:
        raise KeyError(f"Reference label key '{label_key}' not found in reference obs")

    ref = ref.copy()
    if ref.raw is None and _looks_like_counts(ref.X):
        LOGGER.info("Reference looks like raw counts; log-normalizing")
        sc.pp.normalize_total(ref, target_sum=1e4)
        sc.pp.log1p(ref)

    labels = ref.obs[label_key].astype(str)
    keep = labels.map(labels.value_counts()) >= 2
    if (~keep).any():
        LOGGER.warning(
            "Dropping %d reference cells in labels with a single cell", int((~keep).sum())
        )
    ref = ref[keep.to_numpy()].copy()
    ref.obs[label_key] = ref.obs[label_key].astype(str).astype("category")

    markers = compute_cluster_markers(ref, label_key, method="t-test", top_n=n_genes)
    genes = list(dict.fromkeys(markers["gene"]))

    X = _expression(ref, genes)
    lab = ref.obs[label_key].astype(str).to_numpy()
    profiles = pd.DataFrame(
        {l: X[lab == l].mean(axis=0) for l in sorted(pd.unique(lab))},
        index=genes,
    )
    LOGGER.info(
        "Built reference profiles: %d labels x %d marker genes", profiles.shape[1], len(genes)
    )
    return profiles


def _center_scale(M: np.ndarray, axis: int) -> np.ndarray:
    M = M - M.mean(axis=axis, keepdims=True)
    norm = np.sqrt((M ** 2).sum(axis=axis, keepdims=True))
    with np.errstate(divide="ignore", invalid="ignore"):
        return np.where(norm > 0, M / norm, 0.0)


def correlate_to_reference(
    adata: ad.AnnData,
    profiles: pd.DataFrame,
    *,
    min_delta: float = 0.05,
    min_genes: int = 10,
) -> pd.DataFrame:
    """
    Per-cell Spearman correlation against every reference profile.

    Returns a frame indexed by cell with the best label, its correlation and
    the margin to the runner-up. Cells whose margin is below `min_delta`
    are labelled 'ambiguous'.
    """
    var_names = adata.raw.var_names if adata.raw is not None else adata.var_names
    genes = [g for g in profiles.index if g in set(var_names)]
    if len(genes) < min_genes:
        raise ValueError(
            f"Only {len(genes)} reference marker genes present in the dataset "
            f"(need >= {min_genes})"
        )
    if profiles.shape[1] < 2:
        raise ValueError("Reference must contain at least two labels")

    src = adata.raw.to_adata() if adata.raw is not None else adata
    gene_idx = src.var_names.get_indexer(genes)

    labels = np.asarray(profiles.columns.astype(str))
    P = _center_scale(rankdata(profiles.loc[genes].to_numpy(), axis=0), axis=0)

    best_lab, best, delta = [], [], []
    for start in range(0, adata.n_obs, _CHUNK):
        X = src.X[start:start + _CHUNK][:, gene_idx]
        X = X.toarray() if sp.issparse(X) else np.asarray(X)
        R = _center_scale(rankdata(X, axis=1), axis=1)
        corr = np.nan_to_num(R @ P, nan=-1.0)

        order = np.argsort(-corr, axis=1, kind="stable")
        top = np.take_along_axis(corr, order[:, :1], axis=1).ravel()
        second = np.take_along_axis(corr, order[:, 1:2], axis=1).ravel()

        best_lab.append(labels[order[:, 0]])
        best.append(top)
        delta.append(top - second)

    best_lab = np.concatenate(best_lab)
    best = np.concatenate(best)
    delta = np.concatenate(delta)
    called = np.where(delta >= min_delta, best_lab, AMBIGUOUS)

    LOGGER.info(
        "Reference correlation on %d genes: %d / %d cells ambiguous (delta < %.3f)",
        len(genes), int((called == AMBIGUOUS).sum()), adata.n_obs, min_delta,
    )
    return pd.DataFrame(
        {"label": called, "score": best, "delta": delta},
        index=adata.obs_names,
    )


def cluster_majority_labels(
    labels: pd.Series,
    clusters: pd.Series,
) -> pd.Series:
    """
    Most frequent non-ambiguous label per cluster ('ambiguous' if none).
    Equally frequent labels resolve to the alphabetically first.
    """
    df = pd.DataFrame({"cluster": clusters.astype(str), "label": labels.astype(str)})
    out = {}
    for cl, grp in df.groupby("cluster", observed=True):
        counts = grp["label"][grp["label"] != AMBIGUOUS].value_counts()
        if len(counts):
            out[cl] = sorted(counts.index[counts == counts.max()])[0]
        else:
            out[cl] = AMBIGUOUS
    return pd.Series(out, name="label")


# -------------------------------------------------------------------------
# CellTypist
# -------------------------------------------------------------------------
def _load_celltypist_model(name_or_path: str):
    from celltypist import models

    p = Path(name_or_path)
    if p.exists():
        return models.Model.load(str(p))

    model_name = name_or_path if name_or_path.endswith(".pkl") else f"{name_or_path}.pkl"
    LOGGER.info("Fetching CellTypist model %s", model_name)
    models.download_models(model=[model_name])
    return models.Model.load(model_name)


def run_celltypist(
    adata: ad.AnnData,
    model: str,
    *,
    majority_voting: bool = True,
    over_clustering: Optional[str] = None,
) -> pd.Series:
    """CellTypist labels per cell (majority-voted over `over_clustering` when asked)."""
    import celltypist

    query = adata.raw.to_adata() if adata.raw is not None else adata.copy()
    mdl = _load_celltypist_model(model)

    LOGGER.info("Running CellTypist annotation (majority_voting=%s)...", majority_voting)
    predictions = celltypist.annotate(
        query,
        model=mdl,
        majority_voting=majority_voting,
        over_clustering=query.obs[over_clustering] if over_clustering else None,
    )
    pl = predictions.predicted_labels
    col = "majority_voting" if majority_voting and "majority_voting" in pl else "predicted_labels"
    return pl[col].astype(str).reindex(adata.obs_names)


# -------------------------------------------------------------------------
# Manual relabelling
# -------------------------------------------------------------------------
def read_annotation_csv(path: Path) -> Dict[str, str]:
    """CSV with columns 'cluster' and 'label'."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Annotation CSV not found: {path}")
    df = pd.read_csv(path, dtype=str)
    missing = {"cluster", "label"}.difference(df.columns)
    if missing:
        raise KeyError(f"Annotation CSV {path} is missing columns: {sorted(missing)}")

    df = df.dropna(subset=["cluster"])
    dups = df["cluster"][df["cluster"].duplicated()].unique()
    if len(dups):
        raise ValueError(f"Annotation CSV assigns more than one label to clusters {list(dups)}")
    return dict(zip(df["cluster"].str.strip(), df["label"].fillna("").str.strip()))


def apply_manual_labels(clusters: pd.Series, mapping: Dict[str, str]) -> pd.Series:
    """Map cluster ids to labels; unmapped clusters keep their id."""
    clusters = clusters.astype(str)
    present = set(clusters.unique())

    unmapped = sorted(present.difference(mapping))
    if unmapped:
        LOGGER.warning("No manual label for clusters %s; keeping cluster ids", unmapped)
    unknown = sorted(set(mapping).difference(present))
    if unknown:
        LOGGER.warning("Annotation CSV lists clusters not in the data: %s", unknown)

    full = {c: (mapping.get(c) or c) for c in present}
    return clusters.map(full)
