from __future__ import annotations

from pydantic import BaseModel, Field, validator, model_validator
from pathlib import Path
from typing import Optional, List, Literal
from matplotlib.figure import Figure

from .doublet_utils import (
    DEFAULT_PK_GRID,
    DEFAULT_PN_GRID,
    DoubletParams,
)


def _check_figure_format(fmt: str) -> str:
    supported = Figure().canvas.get_supported_filetypes()
    fmt = fmt.lower()
    if fmt not in supported:
        raise ValueError(
            f"Unsupported figure format '{fmt}'. "
            f"Supported formats include: {', '.join(sorted(supported))}"
        )
    return fmt


# ---------------------------------------------------------------------
# LOAD AND QC CONFIG
# ---------------------------------------------------------------------
class LoadAndQCConfig(BaseModel):

    # ---- Input ----
    sample_dir: Path
    sample_pattern: str = "*"
    metadata_tsv: Optional[Path] = None
    batch_key: Optional[str] = None

    # ---- Output ----
    output_dir: Path
    output_name: str = "adata.qc.h5ad"

    # ---- Compute ----
    n_jobs: int = 4

    # ---- QC ----
    min_cells: int = Field(3, ge=0)
    min_genes: int = Field(200, ge=0)
    max_genes: Optional[int] = None
    min_counts: int = Field(500, ge=0)
    max_pct_mt: float = Field(10.0, ge=0.0, le=100.0)
    min_log10_genes_per_umi: float = Field(0.8, ge=0.0, le=1.0)
    min_cells_per_sample: int = Field(20, ge=0)

    # ---- Gene categories ----
    mt_prefix: str = "MT-"
    ribo_prefixes: List[str] = Field(default_factory=lambda: ["RPL", "RPS"])

    # ---- Figures ----
    make_figures: bool = True
    figdir_name: str = "figures"
    figure_formats: List[str] = Field(default_factory=lambda: ["png", "pdf"])

    # ---- Logging ----
    logfile: Optional[Path] = None

    @property
    def figdir(self) -> Path:
        return self.output_dir / self.figdir_name

    @validator("output_name")
    def coerce_checkpoint_suffix(cls, v: str) -> str:
        if not (v.endswith(".h5ad") or v.endswith(".zarr")):
            v = f"{v}.h5ad"
        return v

    @validator("figure_formats", each_item=True)
    def validate_formats(cls, fmt: str):
        return _check_figure_format(fmt)

    @model_validator(mode="after")
    def check_gene_bounds(self):
        if self.max_genes is not None and self.max_genes <= self.min_genes:
            raise ValueError("max_genes must be > min_genes")
        return self


# ---------------------------------------------------------------------
# DOUBLET CONFIG
# ---------------------------------------------------------------------
class DoubletConfig(BaseModel):

    # ---- I/O ----
    input_path: Path
    output_dir: Optional[Path] = None
    output_name: str = "adata.doublets.h5ad"
    batch_key: Optional[str] = None
    counts_layer: str = "counts"

    # ---- Multiplet rate ----
    multiplet_rate: Optional[float] = Field(
        None,
        ge=0.0,
        le=1.0,
        description="Known multiplet rate. If None, estimated per sample from the 10x loading table.",
    )

    # ---- Sweep ----
    pN_grid: List[float] = Field(default_factory=lambda: list(DEFAULT_PN_GRID))
    pK_grid: List[float] = Field(default_factory=lambda: list(DEFAULT_PK_GRID))
    final_pN: float = Field(0.25, gt=0.0, lt=1.0)

    # ---- Preprocessing ----
    n_top_genes: int = Field(2000, ge=10)
    max_pcs: int = Field(50, ge=2)

    # ---- PC heuristics ----
    cumulative_variance_pct: float = Field(90.0, gt=0.0, le=100.0)
    component_variance_pct: float = Field(5.0, gt=0.0, le=100.0)
    variance_step_pct: float = Field(0.1, gt=0.0)
    fallback_n_pcs: int = Field(10, ge=2)

    # ---- Provisional clustering ----
    provisional_resolution: float = Field(0.1, gt=0.0)

    # ---- Runtime ----
    random_state: Optional[int] = 42
    n_jobs: int = Field(1, ge=1)
    sweep_n_jobs: int = Field(1, ge=1)
    remove_doublets: bool = True

    # ---- Figures ----
    make_figures: bool = True
    figdir_name: str = "figures"
    figure_formats: List[str] = Field(default_factory=lambda: ["png", "pdf"])

    logfile: Optional[Path] = None

    @property
    def out_dir(self) -> Path:
        return self.output_dir if self.output_dir is not None else self.input_path.parent

    @property
    def figdir(self) -> Path:
        return self.out_dir / self.figdir_name

    @validator("pN_grid")
    def check_pn_grid(cls, v: List[float]) -> List[float]:
        if not v:
            raise ValueError("pN_grid must not be empty")
        if any(not (0 < x < 1) for x in v):
            raise ValueError("pN values must be in (0, 1)")
        return sorted(set(float(x) for x in v))

    @validator("pK_grid")
    def check_pk_grid(cls, v: List[float]) -> List[float]:
        if not v:
            raise ValueError("pK_grid must not be empty")
        if any(not (0 < x <= 1) for x in v):
            raise ValueError("pK values must be in (0, 1]")
        return sorted(set(float(x) for x in v))

    @validator("figure_formats", each_item=True)
    def validate_formats(cls, fmt: str):
        return _check_figure_format(fmt)

    def to_params(self) -> DoubletParams:
        return DoubletParams(
            pN_grid=tuple(self.pN_grid),
            pK_grid=tuple(self.pK_grid),
            final_pN=self.final_pN,
            n_top_genes=self.n_top_genes,
            max_pcs=self.max_pcs,
            cumulative_variance_pct=self.cumulative_variance_pct,
            component_variance_pct=self.component_variance_pct,
            variance_step_pct=self.variance_step_pct,
            fallback_n_pcs=self.fallback_n_pcs,
            provisional_resolution=self.provisional_resolution,
            sweep_n_jobs=self.sweep_n_jobs,
        )


# ---------------------------------------------------------------------
# PROCESS AND INTEGRATE CONFIG
# ---------------------------------------------------------------------
class ProcessAndIntegrateConfig(BaseModel):

    input_path: Path
    output_dir: Optional[Path] = None
    output_name: str = "adata.integrated.h5ad"

    batch_key: Optional[str] = None
    counts_layer: str = "counts"

    # ---- Normalization / features ----
    target_sum: float = 1e4
    n_top_genes: int = Field(2000, ge=10)
    scale_max_value: float = 10.0
    max_pcs: int = Field(50, ge=2)
    n_pcs: Optional[int] = Field(
        None,
        ge=2,
        description="Fixed number of PCs for graphs. If None, chosen by the PC heuristics.",
    )
    fallback_n_pcs: int = Field(10, ge=2)

    # ---- Integration ----
    method: Literal["harmony", "scanorama", "bbknn", "scvi", "none"] = "harmony"
    n_neighbors: int = Field(15, ge=2)
    random_state: int = 42

    figdir_name: str = "figures"
    make_figures: bool = True
    figure_formats: List[str] = Field(default_factory=lambda: ["png", "pdf"])

    logfile: Optional[Path] = None

    @property
    def out_dir(self) -> Path:
        return self.output_dir if self.output_dir is not None else self.input_path.parent

    @property
    def figdir(self) -> Path:
        return self.out_dir / self.figdir_name

    @validator("method", pre=True)
    def normalize_method(cls, v):
        return str(v).strip().lower()

    @validator("figure_formats", each_item=True)
    def validate_formats(cls, fmt: str):
        return _check_figure_format(fmt)


# ---------------------------------------------------------------------
# CLUSTER AND ANNOTATE CONFIG
# ---------------------------------------------------------------------
class ClusterAnnotateConfig(BaseModel):
    # I/O
    input_path: Path = Field(..., description="Integrated h5ad from process-and-integrate")
    output_path: Optional[Path] = Field(
        None,
        description="Output h5ad. Defaults to <input>.clustered.annotated.h5ad",
    )

    embedding_key: str = Field(
        "X_integrated",
        description="Key in .obsm used for neighbors / silhouette",
    )
    batch_key: Optional[str] = None
    label_key: str = "leiden"
    n_neighbors: int = Field(15, ge=2)

    # Resolution sweep
    res_min: float = Field(0.1, gt=0.0)
    res_max: float = Field(2.0, gt=0.0)
    n_resolutions: int = Field(20, ge=2)
    resolution: Optional[float] = Field(
        None,
        gt=0.0,
        description="Use this resolution instead of the penalized-silhouette choice.",
    )
    penalty_alpha: float = Field(0.02, ge=0.0)

    # Stability analysis
    stability_repeats: int = Field(5, ge=1)
    subsample_frac: float = Field(0.8, gt=0.0, le=1.0)
    random_state: int = 42

    # Markers
    marker_method: Literal["wilcoxon", "t-test", "t-test_overestim_var", "logreg"] = "wilcoxon"
    marker_top_n: int = Field(100, ge=1)

    # Reference annotation
    reference_method: Literal["correlation", "celltypist", "none"] = "correlation"
    reference_path: Optional[Path] = None
    reference_label_key: str = "cell_type"
    reference_n_genes: int = Field(50, ge=1, description="Marker genes per reference label")
    min_delta: float = Field(0.05, ge=0.0)
    celltypist_model: Optional[str] = None
    celltypist_majority_voting: bool = True
    reference_label_col: str = "reference_label"

    # Manual annotation
    annotation_csv: Optional[Path] = None
    final_label_key: str = "cell_type"

    # Figures
    figdir_name: str = "figures"
    make_figures: bool = True
    figure_formats: List[str] = Field(default_factory=lambda: ["png", "pdf"])

    logfile: Optional[Path] = None

    @property
    def out_path(self) -> Path:
        if self.output_path is not None:
            return self.output_path
        return self.input_path.with_name(f"{self.input_path.stem}.clustered.annotated.h5ad")

    @property
    def figdir(self) -> Path:
        return self.out_path.parent / self.figdir_name

    @model_validator(mode="after")
    def check_resolution_range(self):
        if self.res_min >= self.res_max:
            raise ValueError("res_min must be < res_max")
        return self

    @model_validator(mode="after")
    def check_reference(self):
        if self.reference_method == "celltypist" and self.celltypist_model is None:
            raise ValueError("reference_method='celltypist' requires celltypist_model")
        return self

    @validator("figure_formats", each_item=True)
    def validate_formats(cls, fmt: str):
        return _check_figure_format(fmt)


# ---------------------------------------------------------------------
# TRAJECTORY CONFIG
# ---------------------------------------------------------------------
class TrajectoryConfig(BaseModel):
    input_path: Path
    output_path: Optional[Path] = None

    groupby: str = "cell_type"
    groups: Optional[List[str]] = Field(
        None,
        description="Restrict the trajectory to these groups (e.g. thymocyte stages).",
    )
    root_group: Optional[str] = None
    root_cell: Optional[str] = None

    use_rep: str = "X_integrated"
    n_neighbors: int = Field(15, ge=2)
    n_dcs: int = Field(10, ge=2)

    figdir_name: str = "figures"
    make_figures: bool = True
    figure_formats: List[str] = Field(default_factory=lambda: ["png", "pdf"])

    logfile: Optional[Path] = None

    @property
    def out_path(self) -> Path:
        if self.output_path is not None:
            return self.output_path
        return self.input_path.with_name(f"{self.input_path.stem}.trajectory.h5ad")

    @property
    def figdir(self) -> Path:
        return self.out_path.parent / self.figdir_name

    @model_validator(mode="after")
    def check_root(self):
        if self.root_group is None and self.root_cell is None:
            raise ValueError("Provide root_group or root_cell to anchor pseudotime")
        return self

    @validator("figure_formats", each_item=True)
    def validate_formats(cls, fmt: str):
        return _check_figure_format(fmt)


# ---------------------------------------------------------------------
# DOWNSTREAM CONFIG
# ---------------------------------------------------------------------
class DownstreamConfig(BaseModel):
    input_path: Path
    output_dir: Optional[Path] = None

    groupby: str = "cell_type"

    # DE
    de_method: Literal["wilcoxon", "t-test", "t-test_overestim_var"] = "wilcoxon"
    padj_cutoff: float = Field(0.05, gt=0.0, le=1.0)
    min_abs_log2fc: float = Field(0.25, ge=0.0)

    # Gene sets
    gene_set_files: List[Path] = Field(default_factory=list)
    gs_min_size: int = Field(5, ge=1)
    gs_max_size: int = Field(500, ge=1)
    score_modules: bool = True
    random_state: int = 42

    figdir_name: str = "figures"
    make_figures: bool = True
    figure_formats: List[str] = Field(default_factory=lambda: ["png", "pdf"])

    logfile: Optional[Path] = None

    @property
    def out_dir(self) -> Path:
        return self.output_dir if self.output_dir is not None else self.input_path.parent

    @property
    def figdir(self) -> Path:
        return self.out_dir / self.figdir_name

    @model_validator(mode="after")
    def check_gs_sizes(self):
        if self.gs_min_size > self.gs_max_size:
            raise ValueError("gs_min_size must be <= gs_max_size")
        return self

    @validator("figure_formats", each_item=True)
    def validate_formats(cls, fmt: str):
        return _check_figure_format(fmt)
