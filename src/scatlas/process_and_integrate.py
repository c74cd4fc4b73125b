# src/scatlas/process_and_integrate.py

from __future__ import annotations
import logging
import warnings
from typing import Optional, Tuple

import anndata as ad
import numpy as np
import scanpy as sc
import torch

from .config import ProcessAndIntegrateConfig
from . import io_utils, plot_utils, reporting
from .doublet_utils import PCSelection, select_n_pcs
from .snapshots import StageSnapshot, load_snapshot

torch.set_float32_matmul_precision("high")
LOGGER = logging.getLogger(__name__)

INTEGRATED_KEY = "X_integrated"


# ---------------------------------------------------------------------
# Normalization + PCA
# ---------------------------------------------------------------------
def normalize_and_hvg(
    adata: ad.AnnData,
    *,
    counts_layer: Optional[str],
    target_sum: float,
    n_top_genes: int,
    batch_key: Optional[str],
) -> ad.AnnData:
    """log-normalize counts into X (in place), keep them in .raw, flag HVGs."""
    if counts_layer is not None:
        if counts_layer not in adata.layers:
            raise KeyError(
                f"Counts layer '{counts_layer}' not found. "
                f"Available layers: {list(adata.layers.keys())}"
            )
        adata.X = adata.layers[counts_layer].copy()
    else:
        adata.layers["counts"] = adata.X.copy()

    sc.pp.normalize_total(adata, target_sum=target_sum)
    sc.pp.log1p(adata)
    adata.raw = adata

    sc.pp.highly_variable_genes(
        adata,
        n_top_genes=min(n_top_genes, adata.n_vars),
        batch_key=batch_key,
    )
    LOGGER.info("Selected %d highly variable genes", int(adata.var["highly_variable"].sum()))
    return adata


def scaled_pca(
    adata: ad.AnnData,
    *,
    max_pcs: int,
    scale_max_value: float,
    random_state: int,
) -> ad.AnnData:
    """
    PCA on scaled HVGs. Scaling happens on a copy so X stays log-normalized.
    """
    hvg = adata[:, adata.var["highly_variable"].to_numpy()].copy()
    sc.pp.scale(hvg, max_value=scale_max_value)

    n_comps = min(max_pcs, hvg.n_obs - 1, hvg.n_vars - 1)
    sc.tl.pca(hvg, n_comps=n_comps, svd_solver="arpack", random_state=random_state)

    adata.obsm["X_pca"] = hvg.obsm["X_pca"]
    adata.uns["pca"] = {
        "variance": np.asarray(hvg.uns["pca"]["variance"]),
        "variance_ratio": np.asarray(hvg.uns["pca"]["variance_ratio"]),
    }
    return adata


def choose_n_pcs(adata: ad.AnnData, cfg: ProcessAndIntegrateConfig) -> PCSelection:
    vr = np.asarray(adata.uns["pca"]["variance_ratio"]) * 100.0
    if cfg.n_pcs is not None:
        n = min(cfg.n_pcs, vr.size)
        return PCSelection(n_pcs=n, by_cumulative=None, by_difference=None, used_fallback=False)
    return select_n_pcs(vr, fallback=cfg.fallback_n_pcs)


# ---------------------------------------------------------------------
# scVI helpers
# ---------------------------------------------------------------------
def _select_device():
    if torch.cuda.is_available():
        return "gpu", "auto"
    if getattr(torch.backends, "mps", None) and torch.backends.mps.is_available():
        return "mps", 1
    return "cpu", "auto"


def _is_oom_error(e: Exception) -> bool:
    txt = str(e).lower()
    return (
        "out of memory" in txt
        or "cuda error" in txt
        or "cublas_status_alloc_failed" in txt
        or ("mps" in txt and "oom" in txt)
    )


def _auto_scvi_epochs(n_cells: int) -> int:
    if n_cells < 50_000:
        return 80
    if n_cells < 200_000:
        return 60
    return 40


def _train_scvi(
    adata: ad.AnnData,
    *,
    batch_key: Optional[str],
    layer: Optional[str],
    random_state: int,
):
    """Train SCVI with an adaptive epoch count, shrinking the batch size on OOM."""
    import scvi
    from scvi.model import SCVI

    scvi.settings.seed = random_state
    accelerator, devices = _select_device()
    epochs = _auto_scvi_epochs(adata.n_obs)

    batch_ladder = [1024, 512, 256, 128, 64, 32]
    last_err = None

    LOGGER.info("Training SCVI (n_cells=%d, epochs=%d)", adata.n_obs, epochs)

    for bsz in batch_ladder:
        try:
            with warnings.catch_warnings():
                warnings.filterwarnings("ignore", message=".*setup_anndata is overwriting.*")
                SCVI.setup_anndata(adata, layer=layer, batch_key=batch_key)

            model = SCVI(adata)
            model.train(
                max_epochs=epochs,
                accelerator=accelerator,
                devices=devices,
                batch_size=bsz,
                enable_progress_bar=False,
            )
            LOGGER.info("SCVI trained successfully (batch_size=%d)", bsz)
            return model

        except RuntimeError as e:
            if _is_oom_error(e):
                LOGGER.warning("OOM at batch_size=%d, retrying smaller...", bsz)
                if torch.cuda.is_available():
                    torch.cuda.empty_cache()
                last_err = e
                continue
            raise

    raise RuntimeError("SCVI training failed") from last_err


# ---------------------------------------------------------------------
# Integration methods
# ---------------------------------------------------------------------
def _run_harmony(adata: ad.AnnData, batch_key: str, n_pcs: int, random_state: int) -> np.ndarray:
    import harmonypy as hm

    LOGGER.info("Running Harmony integration")
    Z = np.asarray(adata.obsm["X_pca"][:, :n_pcs])
    meta = adata.obs[[batch_key]].copy()

    ho = hm.run_harmony(
        Z,
        meta,
        vars_use=[batch_key],
        verbose=False,
        random_state=random_state,
    )
    Z_corr = np.asarray(ho.Z_corr)
    # harmonypy returns (n_pcs, n_cells)
    if Z_corr.shape[0] != adata.n_obs:
        Z_corr = Z_corr.T
    return Z_corr


def _run_scanorama(adata: ad.AnnData, batch_key: str, n_pcs: int) -> np.ndarray:
    import scanorama

    LOGGER.info("Running Scanorama integration")
    hvg = adata[:, adata.var["highly_variable"].to_numpy()]
    batches = adata.obs[batch_key].astype("category").cat.categories

    adatas = [hvg[(adata.obs[batch_key] == b).to_numpy()].copy() for b in batches]
    # embeddings land on the returned copies, not on the inputs
    corrected = scanorama.correct_scanpy(adatas, return_dimred=True, dimred=n_pcs, verbose=False)

    Z = np.zeros((adata.n_obs, n_pcs), dtype=np.float32)
    for sub in corrected:
        idx = adata.obs_names.get_indexer(sub.obs_names)
        if "X_scanorama" in sub.obsm:
            Z[idx] = sub.obsm["X_scanorama"]
        else:
            LOGGER.warning(
                "Scanorama produced no embedding for batch %s; using PCA",
                sub.obs[batch_key].iloc[0],
            )
            Z[idx] = adata.obsm["X_pca"][idx, :n_pcs]
    return Z


def _run_bbknn(adata: ad.AnnData, batch_key: str, n_pcs: int) -> None:
    import bbknn

    LOGGER.info("Running BBKNN graph integration")
    bbknn.bbknn(adata, batch_key=batch_key, use_rep="X_pca", n_pcs=n_pcs)


def _run_scvi(adata: ad.AnnData, batch_key: str, counts_layer: str, random_state: int) -> np.ndarray:
    LOGGER.info("Running scVI integration")
    hvg = adata[:, adata.var["highly_variable"].to_numpy()].copy()
    model = _train_scvi(hvg, batch_key=batch_key, layer=counts_layer, random_state=random_state)
    Z = np.asarray(model.get_latent_representation())
    if torch.cuda.is_available():
        torch.cuda.empty_cache()
    return Z


def integrate(
    adata: ad.AnnData,
    *,
    method: str,
    batch_key: str,
    n_pcs: int,
    counts_layer: str,
    n_neighbors: int,
    random_state: int,
) -> ad.AnnData:
    """
    Write obsm['X_integrated'] and the neighbour graph built on it (in place).
    BBKNN builds the graph itself; its embedding is the plain PCA.
    """
    n_batches = adata.obs[batch_key].nunique()
    if n_batches < 2 and method != "none":
        LOGGER.warning(
            "Only %d batch in '%s'; skipping %s integration.", n_batches, batch_key, method
        )
        method = "none"

    if method == "harmony":
        adata.obsm[INTEGRATED_KEY] = _run_harmony(adata, batch_key, n_pcs, random_state)
    elif method == "scanorama":
        adata.obsm[INTEGRATED_KEY] = _run_scanorama(adata, batch_key, n_pcs)
    elif method == "scvi":
        adata.obsm[INTEGRATED_KEY] = _run_scvi(adata, batch_key, counts_layer, random_state)
    elif method in ("bbknn", "none"):
        adata.obsm[INTEGRATED_KEY] = np.asarray(adata.obsm["X_pca"][:, :n_pcs])
    else:
        raise ValueError(f"Unknown integration method '{method}'")

    if method == "bbknn":
        _run_bbknn(adata, batch_key, n_pcs)
    else:
        sc.pp.neighbors(
            adata,
            n_neighbors=n_neighbors,
            use_rep=INTEGRATED_KEY,
            random_state=random_state,
        )

    adata.uns["integration"] = {"method": method, "batch_key": batch_key, "n_pcs": int(n_pcs)}
    return adata


def embed_umaps(
    adata: ad.AnnData,
    *,
    n_pcs: int,
    n_neighbors: int,
    random_state: int,
) -> ad.AnnData:
    """Unintegrated UMAP (obsm['X_umap_unintegrated']) and integrated UMAP (obsm['X_umap'])."""
    sc.pp.neighbors(
        adata,
        n_neighbors=n_neighbors,
        n_pcs=n_pcs,
        use_rep="X_pca",
        key_added="unintegrated",
        random_state=random_state,
    )
    sc.tl.umap(adata, neighbors_key="unintegrated", random_state=random_state)
    adata.obsm["X_umap_unintegrated"] = adata.obsm["X_umap"].copy()

    sc.tl.umap(adata, random_state=random_state)
    return adata


# ---------------------------------------------------------------------
# Stage
# ---------------------------------------------------------------------
def process_and_integrate_stage(
    snapshot: StageSnapshot,
    cfg: ProcessAndIntegrateConfig,
) -> StageSnapshot:
    adata = snapshot.working_copy()
    batch_key = io_utils.infer_batch_key(adata, cfg.batch_key)
    LOGGER.info("Using batch_key='%s'", batch_key)

    layer = cfg.counts_layer if cfg.counts_layer in adata.layers else None
    adata = normalize_and_hvg(
        adata,
        counts_layer=layer,
        target_sum=cfg.target_sum,
        n_top_genes=cfg.n_top_genes,
        batch_key=batch_key,
    )
    adata = scaled_pca(
        adata,
        max_pcs=cfg.max_pcs,
        scale_max_value=cfg.scale_max_value,
        random_state=cfg.random_state,
    )

    pcs = choose_n_pcs(adata, cfg)
    LOGGER.info("Using %d PCs for graphs and integration", pcs.n_pcs)
    adata.uns["n_pcs"] = int(pcs.n_pcs)

    adata = integrate(
        adata,
        method=cfg.method,
        batch_key=batch_key,
        n_pcs=pcs.n_pcs,
        counts_layer=layer or "counts",
        n_neighbors=cfg.n_neighbors,
        random_state=cfg.random_state,
    )
    adata = embed_umaps(
        adata,
        n_pcs=pcs.n_pcs,
        n_neighbors=cfg.n_neighbors,
        random_state=cfg.random_state,
    )
    adata.uns["batch_key"] = batch_key

    return snapshot.derive(
        "process_and_integrate",
        adata,
        cfg.model_dump(exclude={"logfile"}),
    )


def run_process_and_integrate(cfg: ProcessAndIntegrateConfig) -> StageSnapshot:
    LOGGER.info("Starting process-and-integrate")
    plot_utils.setup_scanpy_figs(cfg.figdir, cfg.figure_formats)

    snapshot = load_snapshot(cfg.input_path)
    new = process_and_integrate_stage(snapshot, cfg)
    adata = new.adata
    batch_key = adata.uns["batch_key"]

    if cfg.make_figures:
        plot_utils.hvgs_and_pca_plots(adata, n_pcs_used=adata.uns["n_pcs"])
        plot_utils.integration_umaps(adata, batch_key=batch_key, method=cfg.method)

    new = new.save(cfg.out_dir / cfg.output_name)

    if cfg.make_figures:
        reporting.generate_stage_report(
            stage="process_and_integrate",
            figdir=cfg.figdir,
            out_html=cfg.out_dir / "process_and_integrate_report.html",
            params=cfg.model_dump(),
            summary=reporting.dataset_summary(adata, batch_key=batch_key),
        )

    plot_utils.close_all()
    LOGGER.info("Finished process-and-integrate")
    return new
