from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import anndata as ad
import numpy as np
import pandas as pd
import scanpy as sc
from sklearn.metrics import adjusted_rand_score, silhouette_score

LOGGER = logging.getLogger(__name__)

SILHOUETTE_MAX_CELLS = 5000


def res_key(r: float) -> str:
    """Canonical string key for a resolution: always '%.3f'."""
    return f"{float(r):.3f}"


def resolution_grid(res_min: float, res_max: float, n: int) -> np.ndarray:
    return np.round(np.linspace(res_min, res_max, n, endpoint=True), 3)


# -------------------------------------------------------------------------
# Typed sweep result
# -------------------------------------------------------------------------
@dataclass(frozen=True)
class ResolutionPartition:
    resolution: float
    labels: np.ndarray
    n_clusters: int
    silhouette: float
    penalized_score: float


@dataclass
class ClusteringSweep:
    partitions: Dict[float, ResolutionPartition] = field(default_factory=dict)
    cell_ids: Optional[pd.Index] = None

    @property
    def resolutions(self) -> List[float]:
        return sorted(self.partitions)

    def __getitem__(self, resolution: float) -> ResolutionPartition:
        return self.partitions[float(resolution)]

    def best_resolution(self) -> float:
        """Max penalized silhouette; ties go to the lower resolution."""
        if not self.partitions:
            raise ValueError("Empty clustering sweep")
        return max(self.resolutions, key=lambda r: (self.partitions[r].penalized_score, -r))

    def summary_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            [
                {
                    "resolution": p.resolution,
                    "n_clusters": p.n_clusters,
                    "silhouette": p.silhouette,
                    "penalized_score": p.penalized_score,
                }
                for p in (self.partitions[r] for r in self.resolutions)
            ]
        )

    def ari_matrix(self) -> pd.DataFrame:
        keys = [res_key(r) for r in self.resolutions]
        out = pd.DataFrame(index=keys, columns=keys, dtype=float)
        for i, r1 in enumerate(self.resolutions):
            for j, r2 in enumerate(self.resolutions):
                if j < i:
                    out.iat[i, j] = out.iat[j, i]
                    continue
                out.iat[i, j] = float(
                    adjusted_rand_score(self.partitions[r1].labels, self.partitions[r2].labels)
                )
        return out


# -------------------------------------------------------------------------
# Clustering primitives
# -------------------------------------------------------------------------
def leiden_labels(
    adata: ad.AnnData,
    resolution: float,
    *,
    random_state: int,
    key_added: str = "_leiden_tmp",
    keep: bool = False,
) -> np.ndarray:
    sc.tl.leiden(
        adata,
        resolution=float(resolution),
        key_added=key_added,
        random_state=random_state,
        flavor="igraph",
        n_iterations=2,
        directed=False,
    )
    labels = adata.obs[key_added].astype(str).to_numpy()
    if not keep:
        del adata.obs[key_added]
    return labels


def _silhouette(X: np.ndarray, labels: np.ndarray, random_state: int) -> float:
    n_clusters = np.unique(labels).size
    if n_clusters <= 1 or n_clusters >= len(labels):
        return -1.0
    sample_size = min(len(labels), SILHOUETTE_MAX_CELLS)
    return float(
        silhouette_score(X, labels, sample_size=sample_size, random_state=random_state)
    )


def resolution_sweep(
    adata: ad.AnnData,
    resolutions: Sequence[float],
    *,
    embedding_key: str,
    penalty_alpha: float,
    random_state: int,
) -> ClusteringSweep:
    """
    Leiden at every resolution on the existing neighbour graph. Each
    partition is scored by silhouette in `embedding_key` minus
    penalty_alpha * n_clusters.
    """
    if "neighbors" not in adata.uns:
        raise RuntimeError("Neighbour graph missing; run sc.pp.neighbors first.")

    X = np.asarray(adata.obsm[embedding_key])
    sweep = ClusteringSweep(cell_ids=adata.obs_names.copy())

    for res in resolutions:
        res = float(res)
        labels = leiden_labels(adata, res, random_state=random_state)
        n_clusters = int(np.unique(labels).size)
        sil = _silhouette(X, labels, random_state)
        part = ResolutionPartition(
            resolution=res,
            labels=labels,
            n_clusters=n_clusters,
            silhouette=sil,
            penalized_score=sil - penalty_alpha * n_clusters,
        )
        sweep.partitions[res] = part

        LOGGER.info(
            "Resolution %.3f: %d clusters, silhouette=%.3f, penalized=%.3f",
            res, n_clusters, sil, part.penalized_score,
        )

    return sweep


def subsampling_stability(
    adata: ad.AnnData,
    reference_labels: np.ndarray,
    resolution: float,
    *,
    embedding_key: str,
    n_neighbors: int,
    repeats: int,
    frac: float,
    random_state: int,
) -> List[float]:
    """
    ARI between the reference partition and re-clusterings of random
    subsamples, on the overlapping cells.
    """
    ref = pd.Series(np.asarray(reference_labels), index=adata.obs_names)
    seeds = np.random.SeedSequence(random_state).spawn(repeats)
    aris: List[float] = []

    n_sub = int(round(frac * adata.n_obs))
    if n_sub < 3:
        LOGGER.warning("Too few cells (%d) for subsampling stability; skipping", n_sub)
        return aris

    for i, seq in enumerate(seeds):
        rng = np.random.default_rng(seq)
        cells = rng.choice(adata.obs_names.to_numpy(), size=n_sub, replace=False)
        sub = ad.AnnData(obs=pd.DataFrame(index=cells))
        sub.obsm[embedding_key] = np.asarray(adata[cells].obsm[embedding_key])

        sc.pp.neighbors(
            sub,
            n_neighbors=min(n_neighbors, n_sub - 1),
            use_rep=embedding_key,
            random_state=random_state + i,
        )
        labels = leiden_labels(sub, resolution, random_state=random_state + i)
        ari = float(adjusted_rand_score(ref.loc[cells].to_numpy(), labels))
        aris.append(ari)

        LOGGER.info("Stability repeat %d/%d: %d cells, ARI=%.3f", i + 1, repeats, n_sub, ari)

    if aris:
        LOGGER.info(
            "Subsampling stability: mean ARI over %d repeats = %.3f", repeats, float(np.mean(aris))
        )
    return aris


# -------------------------------------------------------------------------
# Persisting
# -------------------------------------------------------------------------
def sweep_obs_key(label_key: str, resolution: float) -> str:
    return f"{label_key}_res_{res_key(resolution)}"


def store_sweep(adata: ad.AnnData, sweep: ClusteringSweep, label_key: str) -> None:
    """Export every partition as an obs column plus a summary table in uns."""
    if sweep.cell_ids is not None and not sweep.cell_ids.equals(adata.obs_names):
        raise ValueError("Sweep was computed on a different set of cells")

    for r in sweep.resolutions:
        adata.obs[sweep_obs_key(label_key, r)] = pd.Categorical(sweep[r].labels)
    adata.uns[f"{label_key}_sweep"] = sweep.summary_frame()


def apply_partition(
    adata: ad.AnnData,
    sweep: ClusteringSweep,
    resolution: float,
    label_key: str,
) -> None:
    labels = sweep[resolution].labels
    order = sorted(pd.unique(labels), key=lambda x: (len(x), x))
    adata.obs[label_key] = pd.Categorical(labels, categories=order)
    adata.uns[f"{label_key}_resolution"] = float(resolution)

    from scanpy.plotting.palettes import default_102

    cats = adata.obs[label_key].cat.categories
    if len(cats) <= len(default_102):
        adata.uns[f"{label_key}_colors"] = list(default_102[: len(cats)])

    LOGGER.info(
        "Applied resolution %.3f -> '%s' (%d clusters)", resolution, label_key, len(cats)
    )
