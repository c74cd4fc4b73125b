from __future__ import annotations

import logging
from typing import List, Optional

import anndata as ad
import numpy as np
import pandas as pd
import scanpy as sc

from .config import ClusterAnnotateConfig
from . import annotation_utils, clustering_utils, io_utils, plot_utils, reporting
from .snapshots import StageSnapshot, load_snapshot


LOGGER = logging.getLogger(__name__)


# -------------------------------------------------------------------------
# Internal helpers
# -------------------------------------------------------------------------
def _ensure_embedding(adata: ad.AnnData, embedding_key: str) -> str:
    """
    Ensure the chosen embedding exists; if not, fall back to X_pca.
    Returns the actual embedding key to use.
    """
    if embedding_key in adata.obsm:
        return embedding_key

    if "X_pca" in adata.obsm:
        LOGGER.warning(
            "Embedding key '%s' not found. Falling back to 'X_pca'.", embedding_key
        )
        return "X_pca"

    raise KeyError(
        f"Embedding key '{embedding_key}' not found in adata.obsm and no usable fallback found."
    )


def _resolutions(cfg: ClusterAnnotateConfig) -> List[float]:
    grid = [float(r) for r in clustering_utils.resolution_grid(cfg.res_min, cfg.res_max, cfg.n_resolutions)]
    if cfg.resolution is not None and round(cfg.resolution, 3) not in grid:
        grid.append(round(float(cfg.resolution), 3))
    return sorted(grid)


def _annotate_reference(adata: ad.AnnData, cfg: ClusterAnnotateConfig) -> Optional[pd.Series]:
    """
    Cell-level reference labels (correlation or CellTypist) written to obs.
    Returns the cluster-level majority label, or None when disabled.
    """
    if cfg.reference_method == "none":
        LOGGER.info("Reference annotation disabled.")
        return None

    if cfg.reference_method == "correlation":
        if cfg.reference_path is None:
            LOGGER.info("No reference dataset given; skipping reference annotation.")
            return None
        ref = io_utils.load_dataset(cfg.reference_path)
        profiles = annotation_utils.reference_profiles(
            ref, cfg.reference_label_key, n_genes=cfg.reference_n_genes
        )
        res = annotation_utils.correlate_to_reference(adata, profiles, min_delta=cfg.min_delta)
        adata.obs[cfg.reference_label_col] = pd.Categorical(res["label"])
        adata.obs[f"{cfg.reference_label_col}_score"] = res["score"].to_numpy()
        adata.obs[f"{cfg.reference_label_col}_delta"] = res["delta"].to_numpy()
    else:
        labels = annotation_utils.run_celltypist(
            adata,
            cfg.celltypist_model,
            majority_voting=cfg.celltypist_majority_voting,
            over_clustering=cfg.label_key,
        )
        adata.obs[cfg.reference_label_col] = pd.Categorical(labels.to_numpy())

    majority = annotation_utils.cluster_majority_labels(
        adata.obs[cfg.reference_label_col], adata.obs[cfg.label_key]
    )
    adata.obs[f"{cfg.reference_label_col}_cluster"] = pd.Categorical(
        adata.obs[cfg.label_key].astype(str).map(majority).to_numpy()
    )
    return majority


# -------------------------------------------------------------------------
# Stage
# -------------------------------------------------------------------------
def cluster_and_annotate_stage(
    snapshot: StageSnapshot,
    cfg: ClusterAnnotateConfig,
):
    """
    Resolution sweep, stability, final partition, markers and labels on a
    copy of the snapshot. Returns (new snapshot, sweep, stability ARIs, markers).
    """
    adata = snapshot.working_copy()
    batch_key = io_utils.infer_batch_key(adata, cfg.batch_key)
    embedding_key = _ensure_embedding(adata, cfg.embedding_key)
    LOGGER.info("Using embedding_key='%s', batch_key='%s'", embedding_key, batch_key)

    sc.pp.neighbors(
        adata,
        n_neighbors=cfg.n_neighbors,
        use_rep=embedding_key,
        random_state=cfg.random_state,
    )
    if "X_umap" not in adata.obsm:
        sc.tl.umap(adata, random_state=cfg.random_state)

    # ---- resolution sweep ----
    sweep = clustering_utils.resolution_sweep(
        adata,
        _resolutions(cfg),
        embedding_key=embedding_key,
        penalty_alpha=cfg.penalty_alpha,
        random_state=cfg.random_state,
    )
    clustering_utils.store_sweep(adata, sweep, cfg.label_key)

    if cfg.resolution is not None:
        best_res = round(float(cfg.resolution), 3)
        LOGGER.info("Using configured resolution %.3f", best_res)
    else:
        best_res = sweep.best_resolution()
        LOGGER.info(
            "Selected resolution %.3f (penalized silhouette=%.3f)",
            best_res, sweep[best_res].penalized_score,
        )

    # ---- stability ----
    stability = clustering_utils.subsampling_stability(
        adata,
        sweep[best_res].labels,
        best_res,
        embedding_key=embedding_key,
        n_neighbors=cfg.n_neighbors,
        repeats=cfg.stability_repeats,
        frac=cfg.subsample_frac,
        random_state=cfg.random_state,
    )

    clustering_utils.apply_partition(adata, sweep, best_res, cfg.label_key)

    # ---- markers ----
    markers = pd.DataFrame(columns=annotation_utils.MARKER_COLUMNS)
    if adata.obs[cfg.label_key].nunique() >= 2:
        markers = annotation_utils.compute_cluster_markers(
            adata, cfg.label_key, method=cfg.marker_method, top_n=cfg.marker_top_n
        )
    else:
        LOGGER.warning("Single cluster at resolution %.3f; skipping marker genes", best_res)

    # ---- labels ----
    majority = _annotate_reference(adata, cfg)
    clusters = adata.obs[cfg.label_key].astype(str)

    if cfg.annotation_csv is not None:
        mapping = annotation_utils.read_annotation_csv(cfg.annotation_csv)
        final = annotation_utils.apply_manual_labels(clusters, mapping)
    elif majority is not None:
        final = clusters.map(majority)
    else:
        final = clusters
    adata.obs[cfg.final_label_key] = pd.Categorical(final.to_numpy())

    adata.uns["cluster_and_annotate"] = {
        "embedding_key": embedding_key,
        "batch_key": batch_key,
        "label_key": cfg.label_key,
        "final_label_key": cfg.final_label_key,
        "best_resolution": float(best_res),
        "stability_ari": np.asarray(stability, dtype=float),
        "reference_method": cfg.reference_method,
    }

    new = snapshot.derive("cluster_and_annotate", adata, cfg.model_dump(exclude={"logfile"}))
    return new, sweep, stability, markers


def run_clustering(cfg: ClusterAnnotateConfig) -> StageSnapshot:
    LOGGER.info("Starting cluster_and_annotate")
    plot_utils.setup_scanpy_figs(cfg.figdir, cfg.figure_formats)

    snapshot = load_snapshot(cfg.input_path)
    new, sweep, stability, markers = cluster_and_annotate_stage(snapshot, cfg)
    adata = new.adata
    out_dir = cfg.out_path.parent

    io_utils.export_table(markers, out_dir / "cluster_markers.csv")
    io_utils.export_table(sweep.summary_frame(), out_dir / "clustering_sweep.csv")

    annot_cols = [cfg.label_key, cfg.final_label_key]
    for c in (cfg.reference_label_col, f"{cfg.reference_label_col}_cluster"):
        if c in adata.obs and c not in annot_cols:
            annot_cols.append(c)
    io_utils.export_obs_columns(adata, annot_cols, out_dir / "cell_annotations.csv")

    if cfg.make_figures:
        figdir = "cluster_and_annotate"
        summary = sweep.summary_frame()
        plot_utils.plot_clustering_resolution_sweep(
            resolutions=summary["resolution"].to_numpy(),
            silhouette_scores=summary["silhouette"].tolist(),
            n_clusters=summary["n_clusters"].tolist(),
            penalized_scores=summary["penalized_score"].tolist(),
            figdir=figdir,
        )
        plot_utils.plot_clustering_ari_heatmap(sweep.ari_matrix(), figdir=figdir)
        plot_utils.plot_clustering_stability_ari(stability, figdir=figdir)
        plot_utils.plot_cluster_umaps(
            adata,
            label_key=cfg.label_key,
            batch_key=adata.uns["cluster_and_annotate"]["batch_key"],
            figdir=figdir,
        )
        plot_utils.umap_by(adata, keys=cfg.final_label_key, figdir=figdir)

    new = new.save(cfg.out_path)

    if cfg.make_figures:
        reporting.generate_stage_report(
            stage="cluster_and_annotate",
            figdir=cfg.figdir,
            out_html=out_dir / "cluster_and_annotate_report.html",
            params=cfg.model_dump(),
            summary=reporting.dataset_summary(adata, label_key=cfg.final_label_key),
            tables={"Resolution sweep": sweep.summary_frame()},
        )

    plot_utils.close_all()
    LOGGER.info("Finished cluster_and_annotate. Wrote %s", cfg.out_path)
    return new
