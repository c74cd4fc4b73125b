# src/scatlas/qc.py

from __future__ import annotations

import logging
from typing import Dict, Optional, Sequence, Tuple

import anndata as ad
import numpy as np
import pandas as pd
import scipy.sparse as sp
from kneed import KneeLocator

from . import io_utils, plot_utils, reporting
from .config import LoadAndQCConfig
from .snapshots import StageSnapshot, initial_snapshot

LOGGER = logging.getLogger(__name__)

QC_COLUMNS = [
    "total_counts",
    "n_genes_by_counts",
    "pct_counts_mt",
    "pct_counts_ribo",
    "log10_genes_per_umi",
]


# ---------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------
def compute_qc_metrics(
    adata: ad.AnnData,
    mt_prefix: str = "MT-",
    ribo_prefixes: Sequence[str] = ("RPL", "RPS"),
) -> ad.AnnData:
    """Sparse per-cell and per-gene QC metrics, written into obs / var in place."""
    X = adata.X
    if sp.issparse(X):
        X = X.tocsr()
    else:
        LOGGER.warning("X is dense; QC may be slow and memory intensive.")
        X = sp.csr_matrix(X)

    n_cells = X.shape[0]

    adata.var["mt"] = adata.var_names.str.upper().str.startswith(mt_prefix.upper())
    adata.var["ribo"] = adata.var_names.str.upper().str.startswith(
        tuple(p.upper() for p in ribo_prefixes)
    )

    total_counts = np.asarray(X.sum(axis=1)).ravel()
    n_genes = np.diff(X.indptr)

    def pct_from_mask(mask: np.ndarray) -> np.ndarray:
        if not mask.any():
            return np.zeros(n_cells)
        vals = np.asarray(X[:, np.flatnonzero(mask)].sum(axis=1)).ravel()
        return 100.0 * vals / np.maximum(total_counts, 1)

    # complexity is undefined for cells with <= 1 UMI
    with np.errstate(divide="ignore", invalid="ignore"):
        complexity = np.where(
            total_counts > 1,
            np.log10(np.maximum(n_genes, 1)) / np.log10(np.maximum(total_counts, 2)),
            np.nan,
        )

    adata.obs["total_counts"] = total_counts
    adata.obs["n_genes_by_counts"] = n_genes
    adata.obs["pct_counts_mt"] = pct_from_mask(adata.var["mt"].to_numpy())
    adata.obs["pct_counts_ribo"] = pct_from_mask(adata.var["ribo"].to_numpy())
    adata.obs["log10_genes_per_umi"] = complexity

    n_cells_by_counts = np.diff(X.tocsc().indptr)
    total_counts_gene = np.asarray(X.sum(axis=0)).ravel()

    adata.var["n_cells_by_counts"] = n_cells_by_counts
    adata.var["total_counts"] = total_counts_gene
    adata.var["mean_counts"] = total_counts_gene / max(n_cells, 1)
    adata.var["pct_dropout_by_counts"] = 100 * (1 - n_cells_by_counts / max(n_cells, 1))

    return adata


def umi_knee(total_counts: np.ndarray) -> Optional[int]:
    """Barcode rank at the knee of the sorted UMI curve, None if undetectable."""
    counts = np.sort(np.asarray(total_counts, dtype=float))[::-1]
    if counts.size < 10:
        return None
    ranks = np.arange(1, counts.size + 1)
    kl = KneeLocator(ranks, counts, curve="convex", direction="decreasing")
    return int(kl.elbow) if kl.elbow is not None else None


# ---------------------------------------------------------------------
# Filtering
# ---------------------------------------------------------------------
def cell_filter_mask(
    obs: pd.DataFrame,
    *,
    min_genes: int,
    max_genes: Optional[int],
    min_counts: int,
    max_pct_mt: float,
    min_log10_genes_per_umi: float,
) -> Tuple[np.ndarray, Dict[str, int]]:
    """Boolean keep-mask and the number of cells failing each criterion."""
    n_genes = obs["n_genes_by_counts"].to_numpy()
    checks = {
        "min_genes": n_genes >= min_genes,
        "min_counts": obs["total_counts"].to_numpy() >= min_counts,
        "max_pct_mt": obs["pct_counts_mt"].to_numpy() <= max_pct_mt,
        "min_log10_genes_per_umi": np.nan_to_num(
            obs["log10_genes_per_umi"].to_numpy(dtype=float), nan=-1.0
        ) >= min_log10_genes_per_umi,
    }
    if max_genes is not None:
        checks["max_genes"] = n_genes <= max_genes

    keep = np.logical_and.reduce(list(checks.values()))
    failed = {k: int((~v).sum()) for k, v in checks.items()}
    return keep, failed


def filter_genes(adata: ad.AnnData, min_cells: int) -> ad.AnnData:
    X = adata.X.tocsr() if sp.issparse(adata.X) else sp.csr_matrix(adata.X)
    gene_nnz = np.bincount(X.indices, minlength=adata.n_vars)
    gene_mask = gene_nnz >= min_cells
    if gene_mask.sum() == 0:
        raise ValueError(f"All genes removed by min_cells={min_cells}.")
    return adata[:, gene_mask].copy()


def qc_and_filter_sample(
    sample: str,
    adata: ad.AnnData,
    cfg: LoadAndQCConfig,
) -> Tuple[Optional[ad.AnnData], dict, pd.DataFrame]:
    """
    QC + filtering of one sample. Returns (filtered or None if dropped,
    summary row, pre-filter metrics for plotting).
    """
    adata = compute_qc_metrics(adata.copy(), cfg.mt_prefix, cfg.ribo_prefixes)
    pre = adata.obs[QC_COLUMNS].copy()
    pre.insert(0, "sample", sample)

    keep, failed = cell_filter_mask(
        adata.obs,
        min_genes=cfg.min_genes,
        max_genes=cfg.max_genes,
        min_counts=cfg.min_counts,
        max_pct_mt=cfg.max_pct_mt,
        min_log10_genes_per_umi=cfg.min_log10_genes_per_umi,
    )

    row = {
        "sample": sample,
        "n_cells_raw": int(adata.n_obs),
        "n_genes_raw": int(adata.n_vars),
        "umi_knee_rank": umi_knee(adata.obs["total_counts"].to_numpy()) or -1,
        **{f"failed_{k}": v for k, v in failed.items()},
    }

    filtered = adata[keep].copy()
    row["n_cells_filtered"] = int(filtered.n_obs)

    LOGGER.info(
        "[Per-sample QC] %s: %d -> %d cells (%s)",
        sample,
        adata.n_obs,
        filtered.n_obs,
        ", ".join(f"{k}={v}" for k, v in failed.items()),
    )

    if filtered.n_obs < cfg.min_cells_per_sample:
        LOGGER.warning(
            "[Per-sample QC] Dropping sample %s: %d cells < min_cells_per_sample=%d",
            sample,
            filtered.n_obs,
            cfg.min_cells_per_sample,
        )
        row["dropped"] = True
        return None, row, pre

    row["dropped"] = False
    return filtered, row, pre


# ---------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------
def load_and_qc_stage(
    sample_map: Dict[str, ad.AnnData],
    cfg: LoadAndQCConfig,
) -> Tuple[StageSnapshot, pd.DataFrame]:
    """Per-sample QC on already-loaded samples, merge, metadata."""
    filtered: Dict[str, ad.AnnData] = {}
    rows = []
    pre_frames = []

    for sample in sorted(sample_map):
        a, row, pre = qc_and_filter_sample(sample, sample_map[sample], cfg)
        rows.append(row)
        pre_frames.append(pre)
        if a is not None:
            filtered[sample] = a

    if not filtered:
        raise RuntimeError("All samples were dropped during QC")

    qc_table = pd.DataFrame(rows).set_index("sample")
    qc_pre = pd.concat(pre_frames, axis=0)

    batch_key = cfg.batch_key or "sample_id"
    if cfg.metadata_tsv is not None:
        batch_key = io_utils.infer_batch_key_from_metadata_tsv(cfg.metadata_tsv, cfg.batch_key)

    for a in filtered.values():
        a.obs["barcode"] = a.obs_names.astype(str)

    adata = io_utils.merge_samples(filtered, batch_key=batch_key)
    adata = filter_genes(adata, cfg.min_cells)
    adata = compute_qc_metrics(adata, cfg.mt_prefix, cfg.ribo_prefixes)

    if cfg.metadata_tsv is not None:
        adata = io_utils.add_metadata(
            adata, cfg.metadata_tsv, batch_key, expected_samples=sorted(sample_map)
        )

    adata.uns["qc_cell_counts"] = qc_table.reset_index()

    snapshot = initial_snapshot(
        adata,
        "load_and_qc",
        cfg.model_dump(exclude={"logfile"}),
    )
    return snapshot, qc_pre


def run_load_and_qc(cfg: LoadAndQCConfig) -> StageSnapshot:
    LOGGER.info("Starting load-and-qc")
    plot_utils.setup_scanpy_figs(cfg.figdir, cfg.figure_formats)

    sample_dirs = io_utils.detect_sample_dirs(cfg.sample_dir, cfg.sample_pattern)
    LOGGER.info("Found %d samples: %s", len(sample_dirs), ", ".join(sample_dirs))

    sample_map, _ = io_utils.load_samples(sample_dirs, n_jobs=cfg.n_jobs)
    snapshot, qc_pre = load_and_qc_stage(sample_map, cfg)
    adata = snapshot.adata
    batch_key = adata.uns["batch_key"]

    io_utils.export_table(adata.uns["qc_cell_counts"], cfg.output_dir / "qc_cell_counts.csv")

    if cfg.make_figures:
        LOGGER.info("Plotting QC...")
        plot_utils.qc_violin_panels(qc_pre, groupby="sample", stage="prefilter")
        plot_utils.qc_violin_panels(adata.obs, groupby=batch_key, stage="postfilter")
        plot_utils.qc_scatter_panels(adata.obs, stage="postfilter")
        for sample, frame in qc_pre.groupby("sample", observed=True):
            plot_utils.plot_elbow_knee(
                frame["total_counts"].to_numpy(),
                knee_rank=umi_knee(frame["total_counts"].to_numpy()),
                stem=f"{sample}_umi_knee",
            )
        plot_utils.plot_final_cell_counts(adata.obs, batch_key)

    out_path = cfg.output_dir / cfg.output_name
    snapshot = snapshot.save(out_path)

    if cfg.make_figures:
        reporting.generate_stage_report(
            stage="load_and_qc",
            figdir=cfg.figdir,
            out_html=cfg.output_dir / "load_and_qc_report.html",
            params=cfg.model_dump(),
            summary=reporting.dataset_summary(adata, batch_key=batch_key),
        )

    plot_utils.close_all()
    LOGGER.info("Finished load-and-qc")
    return snapshot
