# src/scatlas/trajectory.py

from __future__ import annotations

import logging
from typing import Optional, Sequence

import anndata as ad
import numpy as np
import pandas as pd
import scanpy as sc
import scipy.sparse as sp

from .config import TrajectoryConfig
from . import io_utils, plot_utils, reporting
from .snapshots import StageSnapshot, load_snapshot

LOGGER = logging.getLogger(__name__)


def subset_groups(adata: ad.AnnData, groupby: str, groups: Optional[Sequence[str]]) -> ad.AnnData:
    if groupby not in adata.obs:
        raise KeyError(f"groupby '{groupby}' not found in adata.obs")
    if not groups:
        return adata

    present = set(adata.obs[groupby].astype(str))
    missing = sorted(set(groups).difference(present))
    if missing:
        raise ValueError(f"Groups not found in '{groupby}': {missing}")

    mask = adata.obs[groupby].astype(str).isin(groups).to_numpy()
    LOGGER.info("Restricting trajectory to %d groups (%d cells)", len(groups), int(mask.sum()))
    sub = adata[mask].copy()
    sub.obs[groupby] = sub.obs[groupby].astype(str).astype("category")
    return sub


def pick_root_cell(
    adata: ad.AnnData,
    *,
    groupby: str,
    root_group: Optional[str] = None,
    root_cell: Optional[str] = None,
) -> int:
    """
    Integer index of the root cell: the explicit `root_cell`, or the cell of
    `root_group` sitting at the extreme of the first diffusion component on
    the side where that group lies.
    """
    if root_cell is not None:
        if root_cell not in adata.obs_names:
            raise KeyError(f"root_cell '{root_cell}' not in dataset")
        return int(adata.obs_names.get_loc(root_cell))

    if "X_diffmap" not in adata.obsm:
        raise RuntimeError("Diffusion map missing; run sc.tl.diffmap first.")

    labels = adata.obs[groupby].astype(str).to_numpy()
    in_group = np.flatnonzero(labels == str(root_group))
    if in_group.size == 0:
        raise ValueError(f"root_group '{root_group}' has no cells in '{groupby}'")

    # component 0 of X_diffmap is the trivial stationary one
    dc1 = np.asarray(adata.obsm["X_diffmap"][:, 1])
    if dc1[in_group].mean() <= dc1.mean():
        return int(in_group[np.argmin(dc1[in_group])])
    return int(in_group[np.argmax(dc1[in_group])])


def paga_connectivity_table(adata: ad.AnnData, groupby: str) -> pd.DataFrame:
    conn = adata.uns["paga"]["connectivities"]
    conn = conn.toarray() if sp.issparse(conn) else np.asarray(conn)
    cats = list(adata.obs[groupby].cat.categories)

    rows = [
        {"group_a": cats[i], "group_b": cats[j], "connectivity": float(conn[i, j])}
        for i in range(len(cats))
        for j in range(i + 1, len(cats))
    ]
    return pd.DataFrame(rows, columns=["group_a", "group_b", "connectivity"])


def trajectory_stage(snapshot: StageSnapshot, cfg: TrajectoryConfig):
    adata = subset_groups(snapshot.working_copy(), cfg.groupby, cfg.groups)
    if adata.obs[cfg.groupby].dtype.name != "category":
        adata.obs[cfg.groupby] = adata.obs[cfg.groupby].astype(str).astype("category")

    use_rep = cfg.use_rep if cfg.use_rep in adata.obsm else "X_pca"
    if use_rep != cfg.use_rep:
        LOGGER.warning("Representation '%s' not found; using '%s'", cfg.use_rep, use_rep)

    sc.pp.neighbors(adata, n_neighbors=cfg.n_neighbors, use_rep=use_rep)

    LOGGER.info("Running PAGA on '%s'", cfg.groupby)
    sc.tl.paga(adata, groups=cfg.groupby)

    LOGGER.info("Computing diffusion map (%d components)", cfg.n_dcs)
    sc.tl.diffmap(adata, n_comps=max(cfg.n_dcs, 2))

    iroot = pick_root_cell(
        adata, groupby=cfg.groupby, root_group=cfg.root_group, root_cell=cfg.root_cell
    )
    adata.uns["iroot"] = iroot
    LOGGER.info("Root cell: %s", adata.obs_names[iroot])

    sc.tl.dpt(adata, n_dcs=cfg.n_dcs)

    pt = adata.obs["dpt_pseudotime"].to_numpy(dtype=float)
    unreachable = ~np.isfinite(pt)
    if unreachable.any():
        LOGGER.warning(
            "%d cells are unreachable from the root; their pseudotime is NaN",
            int(unreachable.sum()),
        )
        pt[unreachable] = np.nan
        adata.obs["dpt_pseudotime"] = pt

    table = pd.DataFrame(
        {
            "cell": adata.obs_names,
            "group": adata.obs[cfg.groupby].astype(str).to_numpy(),
            "pseudotime": pt,
        }
    )
    new = snapshot.derive("trajectory", adata, cfg.model_dump(exclude={"logfile"}))
    return new, table


def run_trajectory(cfg: TrajectoryConfig) -> StageSnapshot:
    LOGGER.info("Starting trajectory")
    plot_utils.setup_scanpy_figs(cfg.figdir, cfg.figure_formats)

    snapshot = load_snapshot(cfg.input_path)
    new, table = trajectory_stage(snapshot, cfg)
    adata = new.adata
    out_dir = cfg.out_path.parent

    io_utils.export_table(table, out_dir / "pseudotime.csv")
    io_utils.export_table(
        paga_connectivity_table(adata, cfg.groupby), out_dir / "paga_connectivity.csv"
    )

    if cfg.make_figures:
        plot_utils.trajectory_plots(adata, groupby=cfg.groupby, figdir="trajectory")

    new = new.save(cfg.out_path)

    if cfg.make_figures:
        per_group = (
            table.groupby("group", observed=True)["pseudotime"].median().sort_values().reset_index()
        )
        reporting.generate_stage_report(
            stage="trajectory",
            figdir=cfg.figdir,
            out_html=out_dir / "trajectory_report.html",
            params=cfg.model_dump(),
            summary=reporting.dataset_summary(adata, label_key=cfg.groupby),
            tables={"Median pseudotime per group": per_group},
        )

    plot_utils.close_all()
    LOGGER.info("Finished trajectory")
    return new
