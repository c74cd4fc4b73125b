from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import anndata as ad
import numpy as np
import pandas as pd
import scanpy as sc
import scipy.sparse as sp
from statsmodels.stats.multitest import multipletests

from .config import DownstreamConfig
from . import annotation_utils, io_utils, plot_utils, reporting
from .snapshots import StageSnapshot, load_snapshot

LOGGER = logging.getLogger(__name__)

DE_COLUMNS = ["cluster", "gene", "log2_fold_change", "pval", "pval_adj"]
ENRICHMENT_COLUMNS = ["cluster", "term", "score", "pval", "pval_adj"]
MODULE_COLUMNS = ["cluster", "gene_set", "mean_score", "median_score", "n_cells"]


# -------------------------------------------------------------------------
# Differential expression
# -------------------------------------------------------------------------
def de_per_cluster(
    adata: ad.AnnData,
    groupby: str,
    *,
    method: str = "wilcoxon",
    padj_cutoff: float = 0.05,
    min_abs_log2fc: float = 0.0,
) -> pd.DataFrame:
    """One-vs-rest DE for every cluster, keeping significant genes only."""
    full = annotation_utils.compute_cluster_markers(adata, groupby, method=method, top_n=None)

    keep = (full["pval_adj"] < padj_cutoff) & (full["log2_fold_change"].abs() >= min_abs_log2fc)
    out = full.loc[keep, DE_COLUMNS].sort_values(
        ["cluster", "pval_adj", "gene"], kind="mergesort"
    )
    LOGGER.info(
        "DE: %d / %d gene-cluster pairs pass padj < %.3g and |log2FC| >= %.2f",
        len(out), len(full), padj_cutoff, min_abs_log2fc,
    )
    return out.reset_index(drop=True)


# -------------------------------------------------------------------------
# Gene sets
# -------------------------------------------------------------------------
def load_gene_sets(paths: Sequence[Path]) -> Dict[str, List[str]]:
    """
    Read GMT files through decoupler into {set name: genes}. Set names must
    not repeat across files.
    """
    import decoupler as dc

    sets: Dict[str, List[str]] = {}
    for p in paths:
        p = Path(p)
        if not p.exists():
            raise FileNotFoundError(f"GMT file not found: {p}")

        net = dc.pp.read_gmt(str(p))
        net = net[net["target"].astype(str).str.len() > 0]
        file_sets = {
            str(name): list(dict.fromkeys(grp["target"].astype(str)))
            for name, grp in net.groupby("source", sort=False)
        }

        clash = sorted(set(sets).intersection(file_sets))
        if clash:
            raise ValueError(f"Gene set names defined in more than one GMT file: {clash[:5]}")
        sets.update(file_sets)
        LOGGER.info("Loaded %d gene sets from %s", len(file_sets), p)
    return sets


def filter_gene_sets(
    gene_sets: Dict[str, List[str]],
    universe: Sequence[str],
    *,
    min_size: int,
    max_size: int,
) -> Dict[str, List[str]]:
    """Restrict every set to `universe` and keep those sized within [min_size, max_size]."""
    present = set(map(str, universe))
    out: Dict[str, List[str]] = {}
    for name, genes in gene_sets.items():
        kept = [g for g in genes if g in present]
        if min_size <= len(kept) <= max_size:
            out[name] = kept

    LOGGER.info(
        "Kept %d / %d gene sets with %d-%d genes in the data",
        len(out), len(gene_sets), min_size, max_size,
    )
    return out


def gene_sets_to_net(gene_sets: Dict[str, List[str]]) -> pd.DataFrame:
    rows = [(name, g) for name, genes in gene_sets.items() for g in genes]
    net = pd.DataFrame(rows, columns=["source", "target"])
    net["weight"] = 1.0
    return net


def _expression_source(adata: ad.AnnData) -> ad.AnnData:
    return adata.raw.to_adata() if adata.raw is not None else adata


def cluster_mean_expression(adata: ad.AnnData, groupby: str) -> pd.DataFrame:
    """Mean log-normalized expression, clusters x genes."""
    src = _expression_source(adata)
    labels = adata.obs[groupby].astype(str).to_numpy()
    X = src.X

    rows = {}
    for cl in sorted(pd.unique(labels)):
        sub = X[labels == cl]
        mean = sub.mean(axis=0)
        rows[cl] = np.asarray(mean).ravel() if sp.issparse(sub) else np.asarray(mean)
    return pd.DataFrame.from_dict(rows, orient="index", columns=src.var_names.astype(str))


# -------------------------------------------------------------------------
# Enrichment
# -------------------------------------------------------------------------
def run_ulm(
    mat: pd.DataFrame,
    net: pd.DataFrame,
    *,
    tmin: int = 5,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Univariate linear model activities via decoupler.

    mat: samples x genes. Returns (scores, pvals), both samples x sources.
    """
    import decoupler as dc

    if mat is None or mat.empty:
        raise ValueError("decoupler: 'mat' must be a non-empty pandas DataFrame.")
    if net is None or net.empty:
        raise ValueError("decoupler: 'net' must be a non-empty pandas DataFrame.")

    common = [g for g in mat.columns.astype(str) if g in set(net["target"])]
    if not common:
        raise ValueError("decoupler: no overlap between mat genes and net targets.")

    out = dc.mt.ulm(data=mat.loc[:, common], net=net, tmin=tmin, verbose=False)
    if not isinstance(out, (tuple, list)) or len(out) < 2:
        raise RuntimeError("decoupler: ulm did not return (scores, pvals).")
    scores, pvals = out[0], out[1]
    if not isinstance(scores, pd.DataFrame) or scores.empty:
        raise RuntimeError("decoupler: ulm returned empty/invalid activities.")
    return scores, pvals


def enrichment_per_cluster(
    adata: ad.AnnData,
    groupby: str,
    gene_sets: Dict[str, List[str]],
    *,
    tmin: int = 5,
) -> pd.DataFrame:
    """
    ULM enrichment of each gene set in each cluster's mean profile with
    Benjamini-Hochberg adjustment over all cluster x term tests.
    """
    if not gene_sets:
        LOGGER.warning("No gene sets left after filtering; skipping enrichment")
        return pd.DataFrame(columns=ENRICHMENT_COLUMNS)

    mat = cluster_mean_expression(adata, groupby)
    scores, pvals = run_ulm(mat, gene_sets_to_net(gene_sets), tmin=tmin)

    long = (
        scores.rename_axis("cluster").reset_index()
        .melt(id_vars="cluster", var_name="term", value_name="score")
        .merge(
            pvals.rename_axis("cluster").reset_index()
            .melt(id_vars="cluster", var_name="term", value_name="pval"),
            on=["cluster", "term"],
        )
    )

    finite = np.isfinite(long["pval"].to_numpy(dtype=float))
    long["pval_adj"] = np.nan
    if finite.any():
        long.loc[finite, "pval_adj"] = multipletests(
            long.loc[finite, "pval"].to_numpy(dtype=float), method="fdr_bh"
        )[1]

    long["cluster"] = long["cluster"].astype(str)
    long = long.sort_values(["cluster", "pval", "term"], kind="mergesort").reset_index(drop=True)
    LOGGER.info(
        "Enrichment: %d clusters x %d terms (%d tests with padj < 0.05)",
        scores.shape[0], scores.shape[1], int((long["pval_adj"] < 0.05).sum()),
    )
    return long[ENRICHMENT_COLUMNS]


# -------------------------------------------------------------------------
# Module scores
# -------------------------------------------------------------------------
def score_column(name: str) -> str:
    return "score_" + re.sub(r"[^0-9A-Za-z_]+", "_", name).strip("_")


def score_modules(
    adata: ad.AnnData,
    gene_sets: Dict[str, List[str]],
    *,
    random_state: int = 0,
) -> List[str]:
    """sc.tl.score_genes per gene set; returns the obs columns written."""
    cols: List[str] = []
    for name, genes in gene_sets.items():
        col = score_column(name)
        if col in cols:
            raise ValueError(f"Gene set '{name}' maps to duplicate score column '{col}'")
        sc.tl.score_genes(
            adata,
            gene_list=genes,
            score_name=col,
            random_state=random_state,
            use_raw=adata.raw is not None,
        )
        cols.append(col)
    LOGGER.info("Scored %d gene modules", len(cols))
    return cols


def summarize_module_scores(
    obs: pd.DataFrame,
    groupby: str,
    score_cols: Sequence[str],
) -> pd.DataFrame:
    if not score_cols:
        return pd.DataFrame(columns=MODULE_COLUMNS)

    df = obs[[groupby, *score_cols]].copy()
    df[groupby] = df[groupby].astype(str)
    long = df.melt(id_vars=groupby, var_name="gene_set", value_name="score")
    out = (
        long.groupby([groupby, "gene_set"], observed=True)["score"]
        .agg(mean_score="mean", median_score="median", n_cells="size")
        .reset_index()
        .rename(columns={groupby: "cluster"})
    )
    out["gene_set"] = out["gene_set"].str.replace("^score_", "", regex=True)
    return out[MODULE_COLUMNS]


# -------------------------------------------------------------------------
# Stage
# -------------------------------------------------------------------------
def downstream_stage(snapshot: StageSnapshot, cfg: DownstreamConfig):
    """Returns (new snapshot, de table, enrichment table, module summary)."""
    adata = snapshot.working_copy()
    if cfg.groupby not in adata.obs:
        raise KeyError(f"groupby '{cfg.groupby}' not found in adata.obs")
    adata.obs[cfg.groupby] = adata.obs[cfg.groupby].astype(str).astype("category")

    de = pd.DataFrame(columns=DE_COLUMNS)
    if adata.obs[cfg.groupby].nunique() >= 2:
        de = de_per_cluster(
            adata,
            cfg.groupby,
            method=cfg.de_method,
            padj_cutoff=cfg.padj_cutoff,
            min_abs_log2fc=cfg.min_abs_log2fc,
        )
    else:
        LOGGER.warning("Only one group in '%s'; skipping differential expression", cfg.groupby)

    enrichment = pd.DataFrame(columns=ENRICHMENT_COLUMNS)
    modules = pd.DataFrame(columns=MODULE_COLUMNS)
    if cfg.gene_set_files:
        gene_sets = filter_gene_sets(
            load_gene_sets(cfg.gene_set_files),
            _expression_source(adata).var_names,
            min_size=cfg.gs_min_size,
            max_size=cfg.gs_max_size,
        )
        enrichment = enrichment_per_cluster(
            adata, cfg.groupby, gene_sets, tmin=cfg.gs_min_size
        )
        if cfg.score_modules and gene_sets:
            cols = score_modules(adata, gene_sets, random_state=cfg.random_state)
            modules = summarize_module_scores(adata.obs, cfg.groupby, cols)
    else:
        LOGGER.info("No gene set files given; skipping enrichment and module scores")

    adata.uns["downstream"] = {
        "groupby": cfg.groupby,
        "de_method": cfg.de_method,
        "n_de_genes": int(len(de)),
        "n_gene_sets": int(enrichment["term"].nunique()) if len(enrichment) else 0,
    }

    new = snapshot.derive("downstream", adata, cfg.model_dump(exclude={"logfile"}))
    return new, de, enrichment, modules


def run_downstream(cfg: DownstreamConfig) -> StageSnapshot:
    LOGGER.info("Starting downstream")
    plot_utils.setup_scanpy_figs(cfg.figdir, cfg.figure_formats)

    snapshot = load_snapshot(cfg.input_path)
    new, de, enrichment, modules = downstream_stage(snapshot, cfg)
    out_dir = cfg.out_dir

    io_utils.export_table(de, out_dir / "de_per_cluster.csv")
    io_utils.export_table(enrichment, out_dir / "enrichment_per_cluster.csv")
    if len(modules):
        io_utils.export_table(modules, out_dir / "module_scores_per_cluster.csv")

    if cfg.make_figures:
        plot_utils.downstream_plots(de, enrichment, modules, figdir="downstream")

    new = new.save(out_dir / f"{Path(cfg.input_path).stem}.downstream.h5ad")

    if cfg.make_figures:
        n_de = de.groupby("cluster", observed=True).size().rename("n_de_genes").reset_index()
        reporting.generate_stage_report(
            stage="downstream",
            figdir=cfg.figdir,
            out_html=out_dir / "downstream_report.html",
            params=cfg.model_dump(),
            summary=reporting.dataset_summary(new.adata, label_key=cfg.groupby),
            tables={"Significant DE genes per cluster": n_de},
        )

    plot_utils.close_all()
    LOGGER.info("Finished downstream")
    return new
