from __future__ import annotations

from pathlib import Path
from typing import List, Optional, Sequence

import logging

import matplotlib as mpl
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import scanpy as sc
import anndata as ad

LOGGER = logging.getLogger(__name__)

# -------------------------------------------------------------------------
# Global styling
# -------------------------------------------------------------------------
mpl.rcParams["axes.spines.top"] = False
mpl.rcParams["axes.spines.right"] = False
mpl.rcParams["axes.linewidth"] = 0.6
mpl.rcParams["axes.edgecolor"] = "#555555"

mpl.rcParams["xtick.color"] = "#333333"
mpl.rcParams["ytick.color"] = "#333333"

mpl.rcParams["figure.constrained_layout.use"] = True

FIGURE_FORMATS = ["png", "pdf"]
ROOT_FIGDIR: Path | None = None

QC_METRICS = [
    ("n_genes_by_counts", "QC_violin_genes"),
    ("total_counts", "QC_violin_counts"),
    ("pct_counts_mt", "QC_violin_mt"),
    ("pct_counts_ribo", "QC_violin_ribo"),
    ("log10_genes_per_umi", "QC_violin_complexity"),
]


# -------------------------------------------------------------------------
# Setup + saving
# -------------------------------------------------------------------------
def set_figure_formats(formats: Sequence[str]) -> None:
    global FIGURE_FORMATS
    FIGURE_FORMATS = list(formats)


def setup_scanpy_figs(figdir: Path, formats: Sequence[str] | None = None) -> None:
    """
    Configure Scanpy and global figure settings for scAtlas.
    """
    global ROOT_FIGDIR
    figdir = Path(figdir)
    figdir.mkdir(parents=True, exist_ok=True)
    ROOT_FIGDIR = figdir.resolve()

    if formats is not None:
        set_figure_formats(formats)

    sc.settings.figdir = ROOT_FIGDIR
    sc.settings.autoshow = False
    sc.settings.autosave = False

    sc.settings.set_figure_params(
        dpi=100,
        dpi_save=300,
        facecolor="white",
        frameon=False,
        vector_friendly=True,
        fontsize=10,
        figsize=(6, 5),
        format=FIGURE_FORMATS[0],
    )


def save_multi(stem: str, figdir: Path | str, fig=None) -> None:
    """
    Save the current matplotlib figure (or `fig`) once per configured format,
    to ROOT_FIGDIR / <ext> / figdir / <stem>.<ext>.
    """
    if ROOT_FIGDIR is None:
        raise RuntimeError("ROOT_FIGDIR is not set. Call setup_scanpy_figs() first.")

    if fig is not None:
        plt.figure(fig.number)

    for ext in FIGURE_FORMATS:
        outdir = ROOT_FIGDIR / ext / Path(figdir)
        outdir.mkdir(parents=True, exist_ok=True)
        outfile = outdir / f"{stem}.{ext}"
        LOGGER.info("Saving figure: %s", outfile)
        plt.savefig(outfile, dpi=300)

    plt.close()


def close_all() -> None:
    plt.close("all")


def _clean_axes(ax):
    ax.grid(False)
    for spine in ["left", "bottom"]:
        ax.spines[spine].set_visible(True)
        ax.spines[spine].set_alpha(0.5)
    ax.spines["right"].set_visible(False)
    ax.spines["top"].set_visible(False)
    return ax


# -------------------------------------------------------------------------
# QC
# -------------------------------------------------------------------------
def _violin_with_points(
    ax,
    values: List[np.ndarray],
    *,
    horizontal: bool,
    point_alpha: float = 0.08,
    point_size: float = 3.0,
    max_points: int = 20_000,
    seed: int = 0,
):
    """Per-cell points behind matplotlib violins, one per group."""
    rng = np.random.default_rng(seed)
    non_empty = [v if len(v) else np.array([np.nan]) for v in values]

    for i, y in enumerate(non_empty, start=1):
        y = y[np.isfinite(y)]
        if len(y) > max_points:
            y = rng.choice(y, max_points, replace=False)
        jitter = i + rng.normal(0, 0.04, size=len(y))
        xs, ys = (jitter, y) if horizontal else (y, jitter)
        ax.scatter(xs, ys, s=point_size, alpha=point_alpha, color="black",
                   rasterized=True, zorder=1)

    finite = [v[np.isfinite(v)] for v in non_empty]
    positions = [i for i, v in enumerate(finite, start=1) if len(v) >= 2]
    if positions:
        parts = ax.violinplot(
            [finite[p - 1] for p in positions],
            positions=positions,
            vert=horizontal,
            showmeans=False,
            showextrema=False,
            widths=0.8,
        )
        for body in parts["bodies"]:
            body.set_facecolor("steelblue")
            body.set_alpha(0.5)
            body.set_zorder(2)


def qc_violin_panels(obs: pd.DataFrame, *, groupby: str, stage: str) -> None:
    """
    One violin figure per QC metric, grouped by sample.

    <= 25 samples: samples on the X axis; otherwise stacked on the Y axis.
    """
    if groupby not in obs:
        LOGGER.warning("Group key '%s' missing; skipping QC violin panels", groupby)
        return

    figdir = Path("QC_plots") / "qc_metrics"
    groups = obs[groupby].astype(str)
    cats = sorted(groups.unique())
    horizontal = len(cats) <= 25

    for metric, stem in QC_METRICS:
        if metric not in obs:
            LOGGER.warning("Metric '%s' missing; skipping", metric)
            continue

        vals = [obs.loc[groups == c, metric].to_numpy(dtype=float) for c in cats]
        fig, ax = plt.subplots(figsize=(10, 6) if horizontal else (12, 10))
        _violin_with_points(ax, vals, horizontal=horizontal)

        ticks = range(1, len(cats) + 1)
        if horizontal:
            ax.set_xticks(list(ticks))
            ax.set_xticklabels(cats, rotation=45, ha="right")
            ax.set_ylabel(metric)
        else:
            ax.set_yticks(list(ticks))
            ax.set_yticklabels(cats)
            ax.set_xlabel(metric)

        _clean_axes(ax)
        ax.set_title(f"{metric} ({stage})")
        save_multi(f"{stem}_{stage}", figdir, fig)


def qc_scatter_panels(obs: pd.DataFrame, *, stage: str) -> None:
    """
    Complexity (total_counts vs n_genes_by_counts, coloured by mt%) and
    total_counts vs pct_counts_mt.
    """
    figdir = Path("QC_plots") / "qc_scatter"

    fig, ax = plt.subplots(figsize=(6, 5))
    pts = ax.scatter(
        obs["total_counts"], obs["n_genes_by_counts"],
        c=obs.get("pct_counts_mt"), s=3, cmap="viridis", rasterized=True,
    )
    if "pct_counts_mt" in obs:
        fig.colorbar(pts, ax=ax, label="pct_counts_mt")
    ax.set_xlabel("total_counts")
    ax.set_ylabel("n_genes_by_counts")
    _clean_axes(ax)
    save_multi(f"QC_complexity_{stage}", figdir, fig)

    if "pct_counts_mt" in obs:
        fig, ax = plt.subplots(figsize=(6, 5))
        ax.scatter(obs["total_counts"], obs["pct_counts_mt"], s=3, color="steelblue",
                   rasterized=True)
        ax.set_xlabel("total_counts")
        ax.set_ylabel("pct_counts_mt")
        _clean_axes(ax)
        save_multi(f"QC_scatter_mt_{stage}", figdir, fig)


def plot_elbow_knee(
    total_counts: np.ndarray,
    *,
    knee_rank: Optional[int],
    stem: str,
    figdir: Path | str = Path("QC_plots") / "knee",
    title: str = "Barcode Rank UMI Knee Plot",
) -> None:
    sorted_counts = np.sort(np.asarray(total_counts, dtype=float))[::-1]
    if sorted_counts.size == 0:
        return
    ranks = np.arange(1, len(sorted_counts) + 1)

    fig, ax = plt.subplots(figsize=(6, 5))
    ax.plot(ranks, np.clip(sorted_counts, 1, None), lw=1, color="steelblue")

    if knee_rank is not None:
        knee_val = sorted_counts[knee_rank - 1]
        ax.axvline(knee_rank, color="red", linestyle="--", lw=0.8)
        ax.axhline(max(knee_val, 1), color="red", linestyle="--", lw=0.8)

    ax.set_xscale("log")
    ax.set_yscale("log")
    ax.set_xlabel("Barcode rank")
    ax.set_ylabel("Total UMI counts")
    ax.set_title(title)
    _clean_axes(ax)

    save_multi(stem, figdir, fig)


def plot_final_cell_counts(obs: pd.DataFrame, batch_key: str) -> None:
    """Final per-sample cell counts with a mean line and summary box."""
    if batch_key not in obs:
        LOGGER.warning("batch_key '%s' not found in obs; skipping plot.", batch_key)
        return

    counts = obs[batch_key].astype(str).value_counts().sort_index()
    mean_cells = counts.mean()

    fig, ax = plt.subplots(figsize=(8, 4))
    counts.plot(kind="bar", ax=ax, color="steelblue", edgecolor="black")
    ax.axhline(mean_cells, linestyle="--", color="#1f4e79", linewidth=1.0)
    _clean_axes(ax)

    ax.set_ylabel("Cell count")
    ax.set_title("Final cell counts per sample")
    ax.text(
        0.02, 0.98,
        f"Total cells: {counts.sum():,}\nMean per sample: {mean_cells:,.0f}",
        transform=ax.transAxes,
        fontsize=9,
        va="top",
        bbox=dict(boxstyle="round,pad=0.3", fc="white", ec="gray"),
    )
    plt.xticks(rotation=45, ha="right")

    save_multi("final_cell_counts", Path("QC_plots") / "overview", fig)


# -------------------------------------------------------------------------
# Doublets
# -------------------------------------------------------------------------
def doublet_plots(
    labels: pd.DataFrame,
    summary: pd.DataFrame,
    sweep: pd.DataFrame,
    *,
    samples: pd.Series,
    figdir: Path | str,
) -> None:
    """
    Doublet diagnostics:
      1) BCmvn across pK per sample, optimal pK marked
      2) pANN histogram per sample, called doublets highlighted
      3) expected (homotypic-adjusted) vs called doublets per sample
    """
    figdir = Path(figdir)

    # ---- 1. pK sweep ----
    if len(sweep):
        fig, ax = plt.subplots(figsize=(7, 4))
        opt = summary.set_index("sample")["optimal_pK"] if len(summary) else pd.Series(dtype=float)
        for sample, grp in sweep.groupby("sample", observed=True):
            grp = grp.sort_values("pK")
            line, = ax.plot(grp["pK"], grp["bcmvn"], marker="o", ms=3, lw=1, label=sample)
            if sample in opt.index:
                ax.axvline(opt[sample], color=line.get_color(), linestyle="--", lw=0.6)
        ax.set_xscale("log")
        ax.set_xlabel("pK")
        ax.set_ylabel("BCmvn")
        ax.set_title("Neighbourhood-size sweep")
        if sweep["sample"].nunique() <= 12:
            ax.legend(frameon=False, fontsize=7)
        _clean_axes(ax)
        save_multi("doublet_pk_sweep", figdir, fig)

    # ---- 2. pANN histograms ----
    df = pd.DataFrame(
        {
            "sample": np.asarray(samples),
            "pANN": labels["doublet_pANN"].to_numpy(),
            "call": labels["doublet_call"].astype(object).to_numpy(),
        }
    ).dropna(subset=["pANN"])

    names = sorted(df["sample"].unique())
    if names:
        ncol = min(4, len(names))
        nrow = int(np.ceil(len(names) / ncol))
        fig, axs = plt.subplots(nrow, ncol, figsize=(3.2 * ncol, 2.6 * nrow), squeeze=False)
        for ax, name in zip(axs.ravel(), names):
            sub = df[df["sample"] == name]
            bins = np.linspace(0, max(sub["pANN"].max(), 1e-3), 40)
            ax.hist(sub.loc[sub["call"] != "doublet", "pANN"], bins=bins,
                    color="steelblue", alpha=0.85, label="singlet")
            ax.hist(sub.loc[sub["call"] == "doublet", "pANN"], bins=bins,
                    color="firebrick", alpha=0.85, label="doublet")
            ax.set_title(name, fontsize=9)
            ax.set_xlabel("pANN")
            _clean_axes(ax)
        for ax in axs.ravel()[len(names):]:
            ax.set_visible(False)
        axs[0, 0].legend(frameon=False, fontsize=7)
        save_multi("doublet_pann_hist", figdir, fig)

    # ---- 3. expected vs called ----
    if len(summary):
        s = summary.set_index("sample").sort_index()
        x = np.arange(len(s))
        fig, ax = plt.subplots(figsize=(max(6, 0.6 * len(s)), 4))
        ax.bar(x - 0.2, s["n_expected"], width=0.4, color="lightgray",
               edgecolor="black", label="expected")
        ax.bar(x + 0.2, s["n_called"], width=0.4, color="firebrick",
               edgecolor="black", label="called")
        ax.set_xticks(x)
        ax.set_xticklabels(s.index, rotation=45, ha="right")
        ax.set_ylabel("Doublets")
        ax.set_title("Expected vs called doublets per sample")
        ax.legend(frameon=False)
        _clean_axes(ax)
        save_multi("doublet_expected_vs_called", figdir, fig)

    LOGGER.info("Generated doublet plots for %d samples", len(names))


# -------------------------------------------------------------------------
# Processing + integration
# -------------------------------------------------------------------------
def hvgs_and_pca_plots(adata: ad.AnnData, n_pcs_used: int) -> None:
    figdir = Path("process_and_integrate")

    if "highly_variable" in adata.var:
        sc.pl.highly_variable_genes(adata, show=False)
        save_multi("highly_variable_genes", figdir)

    ratio = adata.uns.get("pca", {}).get("variance_ratio")
    if ratio is None:
        return
    ratio = np.asarray(ratio)
    fig, ax = plt.subplots(figsize=(6, 4))
    ax.plot(np.arange(1, ratio.size + 1), ratio * 100, marker="o", ms=3)
    ax.axvline(n_pcs_used, color="red", linestyle="--", lw=0.8,
               label=f"{n_pcs_used} PCs used")
    ax.set_yscale("log")
    ax.set_xlabel("Principal component")
    ax.set_ylabel("Variance explained (%)")
    ax.legend(frameon=False)
    _clean_axes(ax)
    save_multi("pca_variance_ratio", figdir, fig)


def integration_umaps(adata: ad.AnnData, *, batch_key: str, method: str) -> None:
    """Side-by-side batch-coloured UMAPs before and after integration."""
    figdir = Path("process_and_integrate")
    if batch_key not in adata.obs:
        LOGGER.warning("Batch key '%s' not found in adata.obs", batch_key)
        return

    panels = [("X_umap_unintegrated", "unintegrated"), ("X_umap", method)]
    panels = [(k, t) for k, t in panels if k in adata.obsm]
    if not panels:
        LOGGER.warning("Skipping UMAP plots: no UMAP embeddings found.")
        return

    fig, axs = plt.subplots(1, len(panels), figsize=(6 * len(panels), 5), squeeze=False)
    for ax, (key, title) in zip(axs.ravel(), panels):
        sc.pl.embedding(adata, basis=key, color=batch_key, ax=ax, show=False,
                        title=f"{title}", legend_loc="none" if ax is not axs[0, -1] else "right margin")
    save_multi(f"umap_{batch_key}_integration", figdir, fig)


def umap_by(adata, keys, figdir: Path | str | None = None, stem: str | None = None):
    """UMAP coloured by one or more obs keys."""
    if isinstance(keys, str):
        keys = [keys]
    name = stem or f"umap_{'_'.join(keys)}"

    sc.pl.umap(adata, color=keys, use_raw=False, show=False)
    save_multi(name, figdir if figdir is not None else ".")


# -------------------------------------------------------------------------
# Clustering
# -------------------------------------------------------------------------
def plot_clustering_resolution_sweep(
    resolutions: np.ndarray,
    silhouette_scores: List[float],
    n_clusters: List[int],
    penalized_scores: List[float],
    figdir: Path | str,
) -> None:
    """Plot silhouette, #clusters, and penalized score across resolutions."""
    resolutions = np.array([float(r) for r in resolutions], dtype=float)

    fig, axs = plt.subplots(1, 3, figsize=(14, 4))
    panels = [
        (silhouette_scores, "Silhouette score", "Score"),
        (n_clusters, "Number of clusters", "Clusters"),
        (penalized_scores, "Penalized score\n(silhouette - α·N)", "Score"),
    ]
    for ax, (vals, title, ylabel) in zip(axs, panels):
        _clean_axes(ax)
        ax.plot(resolutions, vals, marker="o")
        ax.set_title(title)
        ax.set_xlabel("Resolution")
        ax.set_ylabel(ylabel)

    save_multi("clustering_resolution_sweep", figdir, fig)


def plot_clustering_ari_heatmap(ari: pd.DataFrame, figdir: Path | str) -> None:
    import seaborn as sns

    if ari.empty:
        return
    n = len(ari)
    fig, ax = plt.subplots(figsize=(2.5 + 0.45 * n, 2 + 0.4 * n))
    sns.heatmap(ari.astype(float), ax=ax, cmap="viridis", vmin=0, vmax=1,
                annot=n <= 12, fmt=".2f", cbar=True)
    ax.set_xlabel("Resolution")
    ax.set_ylabel("Resolution")
    ax.set_title("Pairwise ARI between resolutions")
    save_multi("clustering_ari_heatmap", figdir, fig)


def plot_clustering_stability_ari(stability_aris: List[float], figdir: Path | str) -> None:
    """Line plot of ARI vs repetition for subsampling stability."""
    if not stability_aris:
        return

    repeats = np.arange(1, len(stability_aris) + 1)
    mean_ari = float(np.mean(stability_aris))

    fig, ax = plt.subplots(figsize=(5, 4))
    _clean_axes(ax)
    ax.plot(repeats, stability_aris, marker="o", label="ARI")
    ax.axhline(mean_ari, color="red", linestyle="--", label=f"Mean ARI = {mean_ari:.3f}")
    ax.set_title("Subsampling stability (ARI)")
    ax.set_xlabel("Repeat")
    ax.set_ylabel("ARI with full data")
    ax.legend(frameon=False)

    save_multi("clustering_stability_ari", figdir, fig)


def plot_cluster_umaps(adata, label_key: str, batch_key: str, figdir: Path | str) -> None:
    """UMAPs colored by cluster and batch for the clustering stage."""
    sc.pl.umap(adata, color=[label_key], legend_loc="on data", show=False)
    save_multi(f"cluster_umap_{label_key}", figdir)

    if batch_key in adata.obs:
        sc.pl.umap(adata, color=[batch_key, label_key], show=False)
        save_multi(f"cluster_umap_{batch_key}_and_{label_key}", figdir)


# -------------------------------------------------------------------------
# Trajectory
# -------------------------------------------------------------------------
def trajectory_plots(adata: ad.AnnData, *, groupby: str, figdir: Path | str) -> None:
    """PAGA graph, pseudotime on the UMAP and pseudotime per group."""
    sc.pl.paga(adata, color=groupby, threshold=0.05, show=False)
    save_multi("paga_graph", figdir)

    if "X_umap" in adata.obsm:
        sc.pl.umap(adata, color=[groupby, "dpt_pseudotime"], show=False)
        save_multi("umap_pseudotime", figdir)

    pt = adata.obs[[groupby, "dpt_pseudotime"]].dropna()
    order = pt.groupby(groupby, observed=True)["dpt_pseudotime"].median().sort_values().index
    fig, ax = plt.subplots(figsize=(max(6, 0.5 * len(order)), 4))
    ax.boxplot(
        [pt.loc[pt[groupby] == g, "dpt_pseudotime"].to_numpy() for g in order],
        showfliers=False,
    )
    ax.set_xticks(range(1, len(order) + 1))
    ax.set_xticklabels([str(g) for g in order], rotation=45, ha="right")
    ax.set_ylabel("Diffusion pseudotime")
    _clean_axes(ax)
    save_multi("pseudotime_per_group", figdir, fig)


# -------------------------------------------------------------------------
# Downstream
# -------------------------------------------------------------------------
def _top_terms_heatmap(
    long: pd.DataFrame,
    *,
    value: str,
    term_col: str,
    n: int,
    title: str,
    stem: str,
    figdir: Path | str,
) -> None:
    import seaborn as sns

    wide = long.pivot_table(index="cluster", columns=term_col, values=value, aggfunc="mean")
    wide = wide.apply(pd.to_numeric, errors="coerce").fillna(0)
    if wide.empty:
        return

    selected = sorted({t for cl in wide.index for t in wide.loc[cl].nlargest(n).index})
    sub = wide[selected]

    fig, ax = plt.subplots(figsize=(2.5 + 0.55 * len(selected), 2.5 + 0.40 * len(sub)))
    sns.heatmap(sub, ax=ax, cmap="viridis", cbar=True, linewidths=0)
    for spine in ax.spines.values():
        spine.set_visible(False)
    ax.tick_params(axis="x", rotation=60, labelsize=8)
    ax.tick_params(axis="y", rotation=0, labelsize=8)
    ax.set_title(title)
    save_multi(stem, figdir, fig)


def downstream_plots(
    de: pd.DataFrame,
    enrichment: pd.DataFrame,
    modules: pd.DataFrame,
    *,
    figdir: Path | str,
    n: int = 5,
) -> None:
    if len(de):
        counts = de.groupby("cluster", observed=True).size().sort_index()
        fig, ax = plt.subplots(figsize=(max(6, 0.5 * len(counts)), 4))
        counts.plot(kind="bar", ax=ax, color="steelblue", edgecolor="black")
        ax.set_ylabel("Significant genes")
        ax.set_title("Differentially expressed genes per cluster")
        plt.xticks(rotation=45, ha="right")
        _clean_axes(ax)
        save_multi("de_genes_per_cluster", figdir, fig)

    if len(enrichment):
        _top_terms_heatmap(
            enrichment, value="score", term_col="term", n=n,
            title=f"Top {n} enriched gene sets per cluster (ULM score)",
            stem=f"enrichment_top{n}", figdir=figdir,
        )

    if len(modules):
        _top_terms_heatmap(
            modules, value="mean_score", term_col="gene_set", n=n,
            title="Mean module score per cluster",
            stem="module_scores", figdir=figdir,
        )
