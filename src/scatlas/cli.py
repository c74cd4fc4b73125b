from __future__ import annotations
from typing import Optional, List
import typer
from pathlib import Path
import logging
import warnings

from .config import (
    LoadAndQCConfig,
    DoubletConfig,
    ProcessAndIntegrateConfig,
    ClusterAnnotateConfig,
    TrajectoryConfig,
    DownstreamConfig,
)
from .logging_utils import init_logging
from .qc import run_load_and_qc
from .find_doublets import run_find_doublets
from .process_and_integrate import run_process_and_integrate
from .cluster_and_annotate import run_clustering
from .trajectory import run_trajectory
from .downstream import run_downstream


app = typer.Typer(help="scAtlas CLI: scRNA-seq atlas pipeline from count matrices to annotated, integrated cell states.")
LOGGER = logging.getLogger(__name__)

warnings.filterwarnings("ignore", message="Variable names are not unique", category=UserWarning, module="anndata")
warnings.filterwarnings("ignore", message=".*not compatible with tight_layout.*", category=UserWarning)
warnings.filterwarnings("ignore", message=r".*does not have many workers.*", category=UserWarning, module="lightning.pytorch")


# ---------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------
def _parse_float_list(value: Optional[str], option: str) -> Optional[List[float]]:
    """'0.05,0.1,0.15' -> [0.05, 0.1, 0.15]; None passes through."""
    if value is None:
        return None
    try:
        out = [float(x) for x in value.split(",") if x.strip()]
    except ValueError:
        raise typer.BadParameter(f"{option} expects comma-separated numbers, got '{value}'")
    if not out:
        raise typer.BadParameter(f"{option} must list at least one value")
    return out


def _split_csv(values: Optional[List[str]]) -> Optional[List[str]]:
    if not values:
        return None
    expanded = []
    for v in values:
        expanded.extend([x.strip() for x in v.split(",") if x.strip()])
    return expanded


def _drop_none(**kwargs):
    return {k: v for k, v in kwargs.items() if v is not None}


# ======================================================================
#  load-and-qc
# ======================================================================
@app.command("load-and-qc", help="Load 10x count matrices, compute QC metrics, filter and merge samples.")
def load_and_qc(
    # --- I/O ---
    sample_dir: Path = typer.Option(
        ..., "--sample-dir", "-s", exists=True, file_okay=False,
        help="[I/O] Directory containing one count-matrix folder per sample.",
    ),
    sample_pattern: str = typer.Option("*", "--sample-pattern", help="[I/O] Glob for sample folders."),
    output_dir: Path = typer.Option(..., "--out", "-o", help="[I/O] Output directory."),
    output_name: str = typer.Option("adata.qc.h5ad", "--output-name", help="[I/O] Checkpoint name (.h5ad or .zarr)."),
    metadata_tsv: Optional[Path] = typer.Option(
        None, "--metadata-tsv", "-m", exists=True,
        help="[I/O] TSV with one row per sample.",
    ),
    batch_key: Optional[str] = typer.Option(None, "--batch-key", "-b", help="Sample column in metadata."),
    n_jobs: int = typer.Option(4, "--n-jobs", help="Parallel readers."),
    # --- QC ---
    min_cells: int = typer.Option(3, help="[QC] Minimum cells per gene."),
    min_genes: int = typer.Option(200, help="[QC] Minimum genes per cell."),
    max_genes: Optional[int] = typer.Option(None, help="[QC] Maximum genes per cell."),
    min_counts: int = typer.Option(500, help="[QC] Minimum UMIs per cell."),
    max_pct_mt: float = typer.Option(10.0, help="[QC] Max mitochondrial percentage."),
    min_log10_genes_per_umi: float = typer.Option(0.8, help="[QC] Minimum log10 genes per UMI."),
    min_cells_per_sample: int = typer.Option(20, help="[QC] Drop samples with fewer cells."),
    mt_prefix: str = typer.Option("MT-", help="[QC] Mitochondrial gene prefix."),
    # --- Figures ---
    make_figures: bool = typer.Option(True, help="[Figures] Whether to create QC plots."),
    figure_formats: List[str] = typer.Option(["png", "pdf"], "--figure-formats", "-F", help="[Figures] Formats to save."),
):
    logfile = output_dir / "load-and-qc.log"
    init_logging(logfile)
    cfg = LoadAndQCConfig(
        sample_dir=sample_dir,
        sample_pattern=sample_pattern,
        output_dir=output_dir,
        output_name=output_name,
        metadata_tsv=metadata_tsv,
        batch_key=batch_key,
        n_jobs=n_jobs,
        min_cells=min_cells,
        min_genes=min_genes,
        max_genes=max_genes,
        min_counts=min_counts,
        max_pct_mt=max_pct_mt,
        min_log10_genes_per_umi=min_log10_genes_per_umi,
        min_cells_per_sample=min_cells_per_sample,
        mt_prefix=mt_prefix,
        make_figures=make_figures,
        figure_formats=figure_formats,
        logfile=logfile,
    )
    run_load_and_qc(cfg)


# ======================================================================
#  find-doublets
# ======================================================================
@app.command("find-doublets", help="Per-sample artificial-nearest-neighbour doublet detection.")
def find_doublets(
    # --- I/O ---
    input_path: Path = typer.Option(..., "--input-path", "-i", exists=True, help="[I/O] QC checkpoint."),
    output_dir: Optional[Path] = typer.Option(None, "--output-dir", "-o", help="[I/O] Output directory (default = input parent)."),
    output_name: str = typer.Option("adata.doublets.h5ad", "--output-name"),
    batch_key: Optional[str] = typer.Option(None, "--batch-key", "-b", help="Sample column in .obs."),
    counts_layer: str = typer.Option("counts", "--counts-layer", help="Layer holding raw counts."),
    # --- Doublets ---
    multiplet_rate: Optional[float] = typer.Option(
        None, "--multiplet-rate",
        help="Known multiplet rate for every sample. Default: looked up from the cell count.",
    ),
    pn_grid: Optional[str] = typer.Option(None, "--pn-grid", help="Comma-separated pN values."),
    pk_grid: Optional[str] = typer.Option(None, "--pk-grid", help="Comma-separated pK values."),
    final_pn: float = typer.Option(0.25, "--final-pn"),
    n_top_genes: int = typer.Option(2000, "--n-top-genes"),
    max_pcs: int = typer.Option(50, "--max-pcs"),
    fallback_n_pcs: int = typer.Option(10, "--fallback-n-pcs"),
    provisional_resolution: float = typer.Option(0.1, "--provisional-resolution"),
    remove_doublets: bool = typer.Option(True, "--remove-doublets/--keep-doublets"),
    # --- Runtime ---
    random_state: int = typer.Option(42, "--random-state"),
    n_jobs: int = typer.Option(1, "--n-jobs", help="Samples processed in parallel."),
    sweep_n_jobs: int = typer.Option(1, "--sweep-n-jobs", help="pN values processed in parallel per sample."),
    # --- Figures ---
    make_figures: bool = typer.Option(True, help="[Figures] Whether to create doublet plots."),
    figure_formats: List[str] = typer.Option(["png", "pdf"], "--figure-formats", "-F"),
):
    out_dir = output_dir or input_path.parent
    logfile = out_dir / "find-doublets.log"
    init_logging(logfile)
    cfg = DoubletConfig(
        **_drop_none(
            pN_grid=_parse_float_list(pn_grid, "--pn-grid"),
            pK_grid=_parse_float_list(pk_grid, "--pk-grid"),
        ),
        input_path=input_path,
        output_dir=out_dir,
        output_name=output_name,
        batch_key=batch_key,
        counts_layer=counts_layer,
        multiplet_rate=multiplet_rate,
        final_pN=final_pn,
        n_top_genes=n_top_genes,
        max_pcs=max_pcs,
        fallback_n_pcs=fallback_n_pcs,
        provisional_resolution=provisional_resolution,
        remove_doublets=remove_doublets,
        random_state=random_state,
        n_jobs=n_jobs,
        sweep_n_jobs=sweep_n_jobs,
        make_figures=make_figures,
        figure_formats=figure_formats,
        logfile=logfile,
    )
    _, batch = run_find_doublets(cfg)

    if not batch.ok:
        LOGGER.error(
            "Doublet detection failed for %d sample(s): %s",
            len(batch.failures), ", ".join(sorted(batch.failures)),
        )
        raise typer.Exit(code=1)


# ======================================================================
#  process-and-integrate
# ======================================================================
@app.command("process-and-integrate", help="Normalize, select features, PCA, batch integration and UMAP.")
def process_and_integrate(
    input_path: Path = typer.Option(..., "--input-path", "-i", exists=True, help="[I/O] Doublet checkpoint."),
    output_dir: Optional[Path] = typer.Option(None, "--output-dir", "-o", help="[I/O] Output directory (default = input parent)."),
    output_name: str = typer.Option("adata.integrated.h5ad", "--output-name"),
    batch_key: Optional[str] = typer.Option(None, "--batch-key", "-b"),
    counts_layer: str = typer.Option("counts", "--counts-layer"),
    n_top_genes: int = typer.Option(2000, "--n-top-genes"),
    max_pcs: int = typer.Option(50, "--max-pcs"),
    n_pcs: Optional[int] = typer.Option(None, "--n-pcs", help="Fixed PCs; default chosen from the variance curve."),
    method: str = typer.Option(
        "harmony", "--method", "-m",
        help="[Integration] harmony | scanorama | bbknn | scvi | none",
    ),
    n_neighbors: int = typer.Option(15, "--n-neighbors"),
    random_state: int = typer.Option(42, "--random-state"),
    make_figures: bool = typer.Option(True, help="[Figures] Whether to create plots."),
    figure_formats: List[str] = typer.Option(["png", "pdf"], "--figure-formats", "-F"),
):
    out_dir = output_dir or input_path.parent
    logfile = out_dir / "process-and-integrate.log"
    init_logging(logfile)
    cfg = ProcessAndIntegrateConfig(
        input_path=input_path,
        output_dir=out_dir,
        output_name=output_name,
        batch_key=batch_key,
        counts_layer=counts_layer,
        n_top_genes=n_top_genes,
        max_pcs=max_pcs,
        n_pcs=n_pcs,
        method=method,
        n_neighbors=n_neighbors,
        random_state=random_state,
        make_figures=make_figures,
        figure_formats=figure_formats,
        logfile=logfile,
    )
    run_process_and_integrate(cfg)


# ======================================================================
#  cluster-and-annotate
# ======================================================================
@app.command(
    "cluster-and-annotate",
    help="Leiden resolution sweep + stability, cluster markers and reference / manual annotation.",
)
def cluster_and_annotate(
    # --- I/O ---
    input_path: Path = typer.Option(..., "--input", "-i", exists=True, help="Integrated checkpoint."),
    output_path: Optional[Path] = typer.Option(
        None, "--out", "-o",
        help="Output h5ad. Defaults to <input>.clustered.annotated.h5ad",
    ),
    # --- Embeddings / keys ---
    embedding_key: str = typer.Option("X_integrated", "--embedding-key", "-e"),
    batch_key: Optional[str] = typer.Option(None, "--batch-key", "-b"),
    label_key: str = typer.Option("leiden", "--label-key", "-l"),
    n_neighbors: int = typer.Option(15, "--n-neighbors"),
    # --- Resolution sweep ---
    res_min: float = typer.Option(0.1, "--res-min"),
    res_max: float = typer.Option(2.0, "--res-max"),
    n_resolutions: int = typer.Option(20, "--n-resolutions"),
    resolution: Optional[float] = typer.Option(None, "--resolution", help="Fix the final resolution."),
    penalty_alpha: float = typer.Option(0.02),
    # --- Stability ---
    stability_repeats: int = typer.Option(5),
    subsample_frac: float = typer.Option(0.8),
    random_state: int = typer.Option(42),
    # --- Markers ---
    marker_method: str = typer.Option("wilcoxon", "--marker-method"),
    marker_top_n: int = typer.Option(100, "--marker-top-n"),
    # --- Annotation ---
    reference_method: str = typer.Option(
        "correlation", "--reference-method",
        help="correlation | celltypist | none",
    ),
    reference_path: Optional[Path] = typer.Option(None, "--reference", "-R", exists=True),
    reference_label_key: str = typer.Option("cell_type", "--reference-label-key"),
    min_delta: float = typer.Option(0.05, "--min-delta"),
    celltypist_model: Optional[str] = typer.Option(None, "--celltypist-model", "-M"),
    celltypist_majority_voting: bool = typer.Option(True),
    annotation_csv: Optional[Path] = typer.Option(
        None, "--annotation-csv", "-A", exists=True,
        help="CSV with columns cluster,label.",
    ),
    final_label_key: str = typer.Option("cell_type", "--final-label-key"),
    # --- Figures ---
    make_figures: bool = typer.Option(True),
    figure_formats: List[str] = typer.Option(["png", "pdf"], "--figure-formats", "-F"),
):
    out_dir = (output_path.parent if output_path is not None else input_path.parent)
    logfile = out_dir / "cluster-and-annotate.log"
    init_logging(logfile)
    cfg = ClusterAnnotateConfig(
        input_path=input_path,
        output_path=output_path,
        embedding_key=embedding_key,
        batch_key=batch_key,
        label_key=label_key,
        n_neighbors=n_neighbors,
        res_min=res_min,
        res_max=res_max,
        n_resolutions=n_resolutions,
        resolution=resolution,
        penalty_alpha=penalty_alpha,
        stability_repeats=stability_repeats,
        subsample_frac=subsample_frac,
        random_state=random_state,
        marker_method=marker_method,
        marker_top_n=marker_top_n,
        reference_method=reference_method,
        reference_path=reference_path,
        reference_label_key=reference_label_key,
        min_delta=min_delta,
        celltypist_model=celltypist_model,
        celltypist_majority_voting=celltypist_majority_voting,
        annotation_csv=annotation_csv,
        final_label_key=final_label_key,
        make_figures=make_figures,
        figure_formats=figure_formats,
        logfile=logfile,
    )
    run_clustering(cfg)


# ======================================================================
#  trajectory
# ======================================================================
@app.command("trajectory", help="PAGA abstraction and diffusion pseudotime from a root group or cell.")
def trajectory(
    input_path: Path = typer.Option(..., "--input", "-i", exists=True),
    output_path: Optional[Path] = typer.Option(None, "--out", "-o", help="Defaults to <input>.trajectory.h5ad"),
    groupby: str = typer.Option("cell_type", "--groupby", "-g"),
    groups: Optional[List[str]] = typer.Option(
        None, "--groups",
        help="Restrict to these groups (repeat or comma-separate).",
    ),
    root_group: Optional[str] = typer.Option(None, "--root-group"),
    root_cell: Optional[str] = typer.Option(None, "--root-cell"),
    use_rep: str = typer.Option("X_integrated", "--use-rep"),
    n_neighbors: int = typer.Option(15, "--n-neighbors"),
    n_dcs: int = typer.Option(10, "--n-dcs"),
    make_figures: bool = typer.Option(True),
    figure_formats: List[str] = typer.Option(["png", "pdf"], "--figure-formats", "-F"),
):
    if root_group is None and root_cell is None:
        raise typer.BadParameter("Provide --root-group or --root-cell")

    out_dir = output_path.parent if output_path is not None else input_path.parent
    logfile = out_dir / "trajectory.log"
    init_logging(logfile)
    cfg = TrajectoryConfig(
        input_path=input_path,
        output_path=output_path,
        groupby=groupby,
        groups=_split_csv(groups),
        root_group=root_group,
        root_cell=root_cell,
        use_rep=use_rep,
        n_neighbors=n_neighbors,
        n_dcs=n_dcs,
        make_figures=make_figures,
        figure_formats=figure_formats,
        logfile=logfile,
    )
    run_trajectory(cfg)


# ======================================================================
#  downstream
# ======================================================================
@app.command("downstream", help="Per-cluster DE tables, gene-set enrichment and module scores.")
def downstream(
    input_path: Path = typer.Option(..., "--input", "-i", exists=True),
    output_dir: Optional[Path] = typer.Option(None, "--output-dir", "-o"),
    groupby: str = typer.Option("cell_type", "--groupby", "-g"),
    de_method: str = typer.Option("wilcoxon", "--de-method"),
    padj_cutoff: float = typer.Option(0.05, "--padj-cutoff"),
    min_abs_log2fc: float = typer.Option(0.25, "--min-abs-log2fc"),
    gene_set_files: Optional[List[Path]] = typer.Option(
        None, "--gene-sets", "-G", exists=True,
        help="GMT file(s); repeat for several.",
    ),
    gs_min_size: int = typer.Option(5, "--gs-min-size"),
    gs_max_size: int = typer.Option(500, "--gs-max-size"),
    score_modules: bool = typer.Option(True, "--score-modules/--no-score-modules"),
    random_state: int = typer.Option(42, "--random-state"),
    make_figures: bool = typer.Option(True),
    figure_formats: List[str] = typer.Option(["png", "pdf"], "--figure-formats", "-F"),
):
    out_dir = output_dir or input_path.parent
    logfile = out_dir / "downstream.log"
    init_logging(logfile)
    cfg = DownstreamConfig(
        input_path=input_path,
        output_dir=out_dir,
        groupby=groupby,
        de_method=de_method,
        padj_cutoff=padj_cutoff,
        min_abs_log2fc=min_abs_log2fc,
        gene_set_files=gene_set_files or [],
        gs_min_size=gs_min_size,
        gs_max_size=gs_max_size,
        score_modules=score_modules,
        random_state=random_state,
        make_figures=make_figures,
        figure_formats=figure_formats,
        logfile=logfile,
    )
    run_downstream(cfg)


if __name__ == "__main__":
    app()
