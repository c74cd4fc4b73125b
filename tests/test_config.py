# tests/test_config.py

import pytest
from pydantic import ValidationError

from scatlas.config import (
    LoadAndQCConfig,
    DoubletConfig,
    ProcessAndIntegrateConfig,
    ClusterAnnotateConfig,
    TrajectoryConfig,
    DownstreamConfig,
)
from scatlas.doublet_utils import DEFAULT_PK_GRID, DEFAULT_PN_GRID


# -------------------------------------------------------------------------
# LoadAndQCConfig
# -------------------------------------------------------------------------
def test_loadandqc_defaults_and_suffix(tmp_path):
    cfg = LoadAndQCConfig(sample_dir=tmp_path, output_dir=tmp_path / "out", output_name="qc")
    assert cfg.output_name == "qc.h5ad"
    assert cfg.figdir == tmp_path / "out" / "figures"
    assert cfg.ribo_prefixes == ["RPL", "RPS"]

    zarr_cfg = LoadAndQCConfig(sample_dir=tmp_path, output_dir=tmp_path, output_name="qc.zarr")
    assert zarr_cfg.output_name == "qc.zarr"


def test_loadandqc_gene_bounds(tmp_path):
    with pytest.raises(ValidationError):
        LoadAndQCConfig(sample_dir=tmp_path, output_dir=tmp_path, min_genes=500, max_genes=400)


def test_figure_format_validation(tmp_path):
    cfg = LoadAndQCConfig(sample_dir=tmp_path, output_dir=tmp_path, figure_formats=["PNG", "svg"])
    assert cfg.figure_formats == ["png", "svg"]
    with pytest.raises(ValidationError):
        LoadAndQCConfig(sample_dir=tmp_path, output_dir=tmp_path, figure_formats=["docx"])


# -------------------------------------------------------------------------
# DoubletConfig
# -------------------------------------------------------------------------
def test_doublet_defaults(tmp_path):
    cfg = DoubletConfig(input_path=tmp_path / "adata.qc.h5ad")
    assert cfg.out_dir == tmp_path
    assert tuple(cfg.pN_grid) == DEFAULT_PN_GRID
    assert tuple(cfg.pK_grid) == DEFAULT_PK_GRID
    assert cfg.remove_doublets is True
    assert cfg.multiplet_rate is None

    params = cfg.to_params()
    assert params.final_pN == 0.25
    assert tuple(params.pK_grid) == DEFAULT_PK_GRID


@pytest.mark.parametrize(
    "kwargs",
    [
        {"pN_grid": []},
        {"pN_grid": [0.0, 0.1]},
        {"pK_grid": [1.5]},
        {"multiplet_rate": 1.5},
        {"final_pN": 1.0},
        {"n_jobs": 0},
    ],
)
def test_doublet_rejects_bad_values(tmp_path, kwargs):
    with pytest.raises(ValidationError):
        DoubletConfig(input_path=tmp_path / "x.h5ad", **kwargs)


# -------------------------------------------------------------------------
# ProcessAndIntegrateConfig
# -------------------------------------------------------------------------
def test_process_method_normalised(tmp_path):
    cfg = ProcessAndIntegrateConfig(input_path=tmp_path / "x.h5ad", method=" Harmony ")
    assert cfg.method == "harmony"
    with pytest.raises(ValidationError):
        ProcessAndIntegrateConfig(input_path=tmp_path / "x.h5ad", method="combat")


# -------------------------------------------------------------------------
# ClusterAnnotateConfig
# -------------------------------------------------------------------------
def test_cluster_default_output_path(tmp_path):
    cfg = ClusterAnnotateConfig(input_path=tmp_path / "adata.integrated.h5ad")
    assert cfg.out_path == tmp_path / "adata.integrated.clustered.annotated.h5ad"
    assert cfg.figdir == tmp_path / "figures"


def test_cluster_resolution_range(tmp_path):
    with pytest.raises(ValidationError):
        ClusterAnnotateConfig(input_path=tmp_path / "x.h5ad", res_min=2.0, res_max=1.0)


def test_cluster_celltypist_requires_model(tmp_path):
    with pytest.raises(ValidationError):
        ClusterAnnotateConfig(input_path=tmp_path / "x.h5ad", reference_method="celltypist")
    cfg = ClusterAnnotateConfig(
        input_path=tmp_path / "x.h5ad",
        reference_method="celltypist",
        celltypist_model="Immune_All_Low",
    )
    assert cfg.celltypist_model == "Immune_All_Low"


# -------------------------------------------------------------------------
# TrajectoryConfig / DownstreamConfig
# -------------------------------------------------------------------------
def test_trajectory_requires_root(tmp_path):
    with pytest.raises(ValidationError):
        TrajectoryConfig(input_path=tmp_path / "x.h5ad")
    cfg = TrajectoryConfig(input_path=tmp_path / "x.h5ad", root_group="DN")
    assert cfg.out_path == tmp_path / "x.trajectory.h5ad"


def test_downstream_gene_set_sizes(tmp_path):
    with pytest.raises(ValidationError):
        DownstreamConfig(input_path=tmp_path / "x.h5ad", gs_min_size=50, gs_max_size=10)
    cfg = DownstreamConfig(input_path=tmp_path / "x.h5ad", output_dir=tmp_path / "ds")
    assert cfg.out_dir == tmp_path / "ds"
    assert cfg.gene_set_files == []
