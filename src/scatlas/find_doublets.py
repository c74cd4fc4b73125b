# src/scatlas/find_doublets.py

from __future__ import annotations

import logging
import zlib
from dataclasses import asdict, dataclass, field
from typing import Dict, Iterable, Mapping, Optional

import anndata as ad
import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from . import io_utils, plot_utils, reporting
from .config import DoubletConfig
from .doublet_utils import (
    CALL_CATEGORIES,
    DOUBLET,
    DoubletParams,
    DoubletResult,
    DoubletSummary,
    detect_doublets,
)
from .snapshots import StageSnapshot, load_snapshot

LOGGER = logging.getLogger(__name__)

STATUS_CALLED = "called"
STATUS_FAILED = "failed"
STATUS_MISSING = "missing"


# ---------------------------------------------------------------------
# Batch containers
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class SampleFailure:
    sample: str
    error_type: str
    message: str


@dataclass
class DoubletBatchResult:
    labels: Dict[str, pd.DataFrame] = field(default_factory=dict)
    summaries: Dict[str, DoubletSummary] = field(default_factory=dict)
    sweeps: Dict[str, pd.DataFrame] = field(default_factory=dict)
    bcmvn: Dict[str, pd.DataFrame] = field(default_factory=dict)
    failures: Dict[str, SampleFailure] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures

    def summary_frame(self) -> pd.DataFrame:
        rows = [self.summaries[s].as_dict() for s in sorted(self.summaries)]
        if not rows:
            return pd.DataFrame(columns=list(DoubletSummary.__dataclass_fields__))
        return pd.DataFrame(rows)

    def failure_frame(self) -> pd.DataFrame:
        rows = [asdict(self.failures[s]) for s in sorted(self.failures)]
        return pd.DataFrame(rows, columns=["sample", "error_type", "message"])

    def sweep_frame(self) -> pd.DataFrame:
        frames = [
            self.bcmvn[s].reset_index().assign(sample=s)
            for s in sorted(self.bcmvn)
        ]
        if not frames:
            return pd.DataFrame(columns=["sample", "pK", "mean_bc", "var_bc", "bcmvn"])
        out = pd.concat(frames, ignore_index=True)
        return out[["sample", "pK", "mean_bc", "var_bc", "bcmvn"]]


# ---------------------------------------------------------------------
# Per-sample runner
# ---------------------------------------------------------------------
def sample_seed(random_state: Optional[int], sample: str) -> Optional[int]:
    """Seed for one sample; depends on the run seed and sample id only."""
    if random_state is None:
        return None
    ss = np.random.SeedSequence([int(random_state), zlib.crc32(sample.encode("utf-8"))])
    return int(ss.generate_state(1)[0])


def _run_one_sample(
    sample: str,
    adata: ad.AnnData,
    params: DoubletParams,
    multiplet_rate: Optional[float],
    random_state: Optional[int],
):
    try:
        result = detect_doublets(
            io_utils.counts_matrix(adata),
            adata.obs_names,
            params,
            sample=sample,
            multiplet_rate=multiplet_rate,
            random_state=sample_seed(random_state, sample),
        )
        return ("ok", sample, result)
    except Exception as e:
        return ("fail", sample, SampleFailure(sample, type(e).__name__, str(e)))


def run_doublet_batch(
    sample_map: Mapping[str, ad.AnnData],
    params: DoubletParams,
    *,
    multiplet_rate: Optional[float] = None,
    random_state: Optional[int] = None,
    n_jobs: int = 1,
) -> DoubletBatchResult:
    """
    Doublet detection on every sample independently. A failing sample is
    recorded in `failures` and does not stop the others.
    """
    if random_state is None:
        LOGGER.warning(
            "find-doublets running without random_state; calls will differ between runs."
        )

    samples = sorted(sample_map)
    LOGGER.info("Doublet detection on %d samples (n_jobs=%d)", len(samples), n_jobs)

    outcomes = Parallel(n_jobs=n_jobs)(
        delayed(_run_one_sample)(
            s, sample_map[s], params, multiplet_rate, random_state
        )
        for s in samples
    )

    batch = DoubletBatchResult()
    for status, sample, payload in outcomes:
        if status == "ok":
            res: DoubletResult = payload
            batch.labels[sample] = res.labels
            batch.summaries[sample] = res.summary
            batch.sweeps[sample] = res.sweep
            batch.bcmvn[sample] = res.bcmvn
        else:
            LOGGER.error(
                "[FAIL] doublet detection for sample %s: %s: %s",
                sample, payload.error_type, payload.message,
            )
            batch.failures[sample] = payload

    LOGGER.info(
        "Doublet detection finished: %d ok, %d failed",
        len(batch.labels), len(batch.failures),
    )
    return batch


# ---------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------
def merge_doublet_labels(
    obs: pd.DataFrame,
    per_sample_labels: Mapping[str, pd.DataFrame],
    *,
    batch_key: Optional[str] = None,
    failed_samples: Iterable[str] = (),
) -> pd.DataFrame:
    """
    Join per-sample labels onto `obs` by cell id.

    Returns a frame indexed like `obs` with doublet_pANN, doublet_call and
    doublet_status. A cell id labelled by more than one sample is an error;
    labels for ids absent from `obs` are dropped with a warning.
    """
    frames = [per_sample_labels[s] for s in sorted(per_sample_labels)]
    if frames:
        combined = pd.concat(frames, axis=0)
    else:
        combined = pd.DataFrame(columns=["pANN", "doublet_call"])
    combined.index = combined.index.astype(str)

    dup = combined.index[combined.index.duplicated()].unique()
    if len(dup):
        raise ValueError(
            f"{len(dup)} cell ids carry labels from more than one sample, "
            f"e.g. {list(dup[:5])}"
        )

    obs_index = pd.Index(obs.index.astype(str))
    unknown = combined.index.difference(obs_index)
    if len(unknown):
        LOGGER.warning(
            "Ignoring doublet labels for %d cell ids not present in the dataset (e.g. %s)",
            len(unknown), list(unknown[:5]),
        )

    aligned = combined.reindex(obs_index)

    out = pd.DataFrame(index=obs.index)
    out["doublet_pANN"] = aligned["pANN"].astype(float).to_numpy()
    out["doublet_call"] = pd.Categorical(
        aligned["doublet_call"].astype(object).to_numpy(),
        categories=CALL_CATEGORIES,
    )

    status = np.where(aligned["doublet_call"].notna().to_numpy(), STATUS_CALLED, STATUS_MISSING)
    failed = set(failed_samples)
    if failed and batch_key is not None:
        in_failed = obs[batch_key].astype(str).isin(failed).to_numpy()
        status = np.where(in_failed & (status == STATUS_MISSING), STATUS_FAILED, status)
    out["doublet_status"] = pd.Categorical(
        status, categories=[STATUS_CALLED, STATUS_FAILED, STATUS_MISSING]
    )
    return out


def _log_doublet_summary(batch: DoubletBatchResult) -> None:
    lines = ["Doublet detection summary:"]
    for s in sorted(batch.summaries):
        sm = batch.summaries[s]
        lines.append(
            f"  {s}: {sm.n_cells} cells, rate={sm.multiplet_rate:.3f} ({sm.rate_source}), "
            f"PCs={sm.n_pcs}, pK={sm.optimal_pK:g}, homotypic={sm.homotypic_proportion:.3f}, "
            f"expected={sm.n_expected}, detectable={sm.n_expected_adjusted}, "
            f"called={sm.n_called}"
        )
    for s in sorted(batch.failures):
        f = batch.failures[s]
        lines.append(f"  {s}: FAILED ({f.error_type}: {f.message})")
    LOGGER.info("\n".join(lines))


# ---------------------------------------------------------------------
# Stage
# ---------------------------------------------------------------------
def find_doublets_stage(
    snapshot: StageSnapshot,
    cfg: DoubletConfig,
) -> tuple[StageSnapshot, DoubletBatchResult]:
    """Label (and optionally drop) doublets, returning a new snapshot."""
    adata = snapshot.working_copy()
    batch_key = io_utils.infer_batch_key(adata, cfg.batch_key)

    layer = cfg.counts_layer if cfg.counts_layer in adata.layers else None
    if layer is None:
        LOGGER.warning(
            "Counts layer '%s' not found; using X as raw counts.", cfg.counts_layer
        )
    sample_map = io_utils.split_by_sample(adata, batch_key, layer=layer)

    batch = run_doublet_batch(
        sample_map,
        cfg.to_params(),
        multiplet_rate=cfg.multiplet_rate,
        random_state=cfg.random_state,
        n_jobs=cfg.n_jobs,
    )
    _log_doublet_summary(batch)

    merged = merge_doublet_labels(
        adata.obs,
        batch.labels,
        batch_key=batch_key,
        failed_samples=batch.failures,
    )
    for col in merged.columns:
        adata.obs[col] = merged[col]

    if batch.summaries:
        adata.uns["doublet_summary"] = batch.summary_frame()
    if batch.failures:
        adata.uns["doublet_failed_samples"] = np.array(sorted(batch.failures), dtype=str)

    if cfg.remove_doublets:
        keep = (adata.obs["doublet_call"] != DOUBLET).to_numpy()
        LOGGER.info(
            "Removing %d called doublets (%d cells remain)",
            int((~keep).sum()), int(keep.sum()),
        )
        adata = adata[keep].copy()

    new = snapshot.derive(
        "find_doublets",
        adata,
        cfg.model_dump(exclude={"logfile"}),
    )
    return new, batch


def run_find_doublets(cfg: DoubletConfig) -> tuple[StageSnapshot, DoubletBatchResult]:
    LOGGER.info("Starting find-doublets")
    plot_utils.setup_scanpy_figs(cfg.figdir, cfg.figure_formats)

    snapshot = load_snapshot(cfg.input_path)
    full_obs = snapshot.adata.obs.copy()
    new, batch = find_doublets_stage(snapshot, cfg)

    out_dir = cfg.out_dir
    batch_key = io_utils.infer_batch_key(snapshot.adata, cfg.batch_key)
    labels = merge_doublet_labels(
        full_obs,
        batch.labels,
        batch_key=batch_key,
        failed_samples=batch.failures,
    )
    labels.index.name = "cell"
    io_utils.export_table(labels.reset_index(), out_dir / "doublet_calls.csv")
    io_utils.export_table(batch.summary_frame(), out_dir / "doublet_summary.csv")
    io_utils.export_table(batch.failure_frame(), out_dir / "doublet_failures.csv")
    io_utils.export_table(batch.sweep_frame(), out_dir / "doublet_pk_sweep.csv")

    if cfg.make_figures:
        plot_utils.doublet_plots(
            labels,
            batch.summary_frame(),
            batch.sweep_frame(),
            samples=full_obs[batch_key].astype(str),
            figdir="doublets",
        )

    new = new.save(out_dir / cfg.output_name)

    if cfg.make_figures:
        reporting.generate_stage_report(
            stage="find_doublets",
            figdir=cfg.figdir,
            out_html=out_dir / "find_doublets_report.html",
            params=cfg.model_dump(),
            summary=reporting.dataset_summary(new.adata),
            tables={
                "Per-sample summary": batch.summary_frame(),
                "Failed samples": batch.failure_frame(),
            },
        )

    plot_utils.close_all()
    LOGGER.info("Finished find-doublets")
    return new, batch
