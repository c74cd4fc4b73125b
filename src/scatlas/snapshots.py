"""
Immutable stage snapshots.

Every pipeline stage takes a StageSnapshot and returns a new one built on a
copy of the data, never mutating its input. Stage provenance (name,
timestamp, package version, parameters) travels inside the AnnData under
``uns["stage_history"]`` so it survives checkpoints.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import anndata as ad

from . import __version__, io_utils

LOGGER = logging.getLogger(__name__)

HISTORY_KEY = "stage_history"
HISTORY_FIELDS = ("stage", "timestamp", "version", "params")


def _jsonable(params: Mapping[str, Any]) -> str:
    return json.dumps(dict(params), default=str, sort_keys=True)


def stage_history(adata: ad.AnnData) -> List[Dict[str, str]]:
    hist = adata.uns.get(HISTORY_KEY)
    if not hist:
        return []
    cols = {k: [str(x) for x in hist.get(k, [])] for k in HISTORY_FIELDS}
    return [
        {k: cols[k][i] for k in HISTORY_FIELDS}
        for i in range(len(cols["stage"]))
    ]


def record_stage(adata: ad.AnnData, stage: str, params: Mapping[str, Any]) -> None:
    hist = stage_history(adata)
    hist.append(
        {
            "stage": stage,
            "timestamp": datetime.now(timezone.utc).isoformat(timespec="seconds"),
            "version": __version__,
            "params": _jsonable(params),
        }
    )
    adata.uns[HISTORY_KEY] = {k: [h[k] for h in hist] for k in HISTORY_FIELDS}


@dataclass(frozen=True)
class StageSnapshot:
    stage: str
    adata: ad.AnnData
    params: Mapping[str, Any] = field(default_factory=dict)
    path: Optional[Path] = None

    @property
    def history(self) -> List[Dict[str, str]]:
        return stage_history(self.adata)

    def working_copy(self) -> ad.AnnData:
        """Fresh AnnData a stage may modify freely."""
        return self.adata.copy()

    def derive(
        self,
        stage: str,
        adata: ad.AnnData,
        params: Optional[Mapping[str, Any]] = None,
    ) -> "StageSnapshot":
        if adata is self.adata:
            raise ValueError(
                f"Stage '{stage}' must produce a new AnnData, not modify '{self.stage}' in place"
            )
        params = dict(params or {})
        record_stage(adata, stage, params)
        return StageSnapshot(stage=stage, adata=adata, params=params)

    def save(self, out_path: Path) -> "StageSnapshot":
        out_path = io_utils.save_dataset(self.adata, out_path)
        return StageSnapshot(stage=self.stage, adata=self.adata, params=self.params, path=out_path)


def initial_snapshot(adata: ad.AnnData, stage: str, params: Mapping[str, Any]) -> StageSnapshot:
    """Snapshot for a freshly built AnnData (start of the pipeline)."""
    record_stage(adata, stage, params)
    return StageSnapshot(stage=stage, adata=adata, params=dict(params))


def load_snapshot(path: Path) -> StageSnapshot:
    adata = io_utils.load_dataset(path)
    hist = stage_history(adata)
    stage = hist[-1]["stage"] if hist else "input"
    LOGGER.info("Loaded snapshot '%s' (%d cells x %d genes) from %s",
                stage, adata.n_obs, adata.n_vars, path)
    return StageSnapshot(stage=stage, adata=adata, path=Path(path))
