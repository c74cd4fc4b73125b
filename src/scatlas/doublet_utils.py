"""
Per-sample doublet detection by artificial-nearest-neighbour proportions.

For one sample's raw counts the routine:

1. normalizes, selects variable genes, scales and runs PCA;
2. picks the number of informative PCs with two heuristics on the
   explained-variance curve and keeps the smaller one;
3. builds a low-resolution provisional Leiden partition (only used to
   estimate the homotypic doublet share);
4. sweeps (pN, pK): synthetic doublets are averaged from random cell pairs,
   merged with the real cells and re-embedded, and every real cell gets its
   proportion of synthetic neighbours (pANN); each pK is scored by the
   mean/variance of the bimodality coefficient across pN;
5. derives the expected number of detectable doublets from the multiplet
   rate and the homotypic proportion;
6. labels the top-N real cells by pANN (at the optimal pK) as doublets.

Everything here is a plain function over arrays so it can be run per sample
in worker processes; orchestration lives in :mod:`scatlas.find_doublets`.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import asdict, dataclass
from typing import Dict, Optional, Sequence, Tuple

import anndata as ad
import numpy as np
import pandas as pd
import scanpy as sc
import scipy.sparse as sp
from joblib import Parallel, delayed
from scipy import stats
from sklearn.neighbors import NearestNeighbors

LOGGER = logging.getLogger(__name__)

SINGLET = "singlet"
DOUBLET = "doublet"
CALL_CATEGORIES = [SINGLET, DOUBLET]

# 10x Genomics Chromium (3' v3) loading table: cells recovered -> multiplet rate
MULTIPLET_RATE_TABLE: Tuple[Tuple[int, float], ...] = (
    (500, 0.004),
    (1000, 0.008),
    (2000, 0.016),
    (3000, 0.023),
    (4000, 0.031),
    (5000, 0.039),
    (6000, 0.046),
    (7000, 0.054),
    (8000, 0.061),
    (9000, 0.069),
    (10000, 0.076),
)

DEFAULT_PN_GRID: Tuple[float, ...] = (0.05, 0.10, 0.15, 0.20, 0.25, 0.30)
DEFAULT_PK_GRID: Tuple[float, ...] = (0.0005, 0.001, 0.005) + tuple(
    round(0.01 * i, 2) for i in range(1, 31)
)


class DoubletConfigurationError(ValueError):
    """The multiplet rate (or another doublet parameter) cannot be determined."""


class DoubletComputationError(RuntimeError):
    """Numeric failure inside one sample's doublet computation."""


class PCSelectionWarning(UserWarning):
    """A PC-count heuristic found no satisfying component; fallback used."""


# ---------------------------------------------------------------------
# Parameter / result containers
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class DoubletParams:
    pN_grid: Tuple[float, ...] = DEFAULT_PN_GRID
    pK_grid: Tuple[float, ...] = DEFAULT_PK_GRID
    final_pN: float = 0.25
    n_top_genes: int = 2000
    max_pcs: int = 50
    cumulative_variance_pct: float = 90.0
    component_variance_pct: float = 5.0
    variance_step_pct: float = 0.1
    fallback_n_pcs: int = 10
    provisional_resolution: float = 0.1
    provisional_n_neighbors: int = 20
    sweep_n_jobs: int = 1


@dataclass(frozen=True)
class PCSelection:
    n_pcs: int
    by_cumulative: Optional[int]
    by_difference: Optional[int]
    used_fallback: bool


@dataclass(frozen=True)
class DoubletSummary:
    sample: str
    n_cells: int
    multiplet_rate: float
    rate_source: str
    n_pcs: int
    n_pcs_by_cumulative: float
    n_pcs_by_difference: float
    optimal_pK: float
    n_provisional_clusters: int
    homotypic_proportion: float
    n_expected: int
    n_expected_adjusted: int
    n_called: int

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class DoubletResult:
    labels: pd.DataFrame
    summary: DoubletSummary
    sweep: pd.DataFrame
    bcmvn: pd.DataFrame


# ---------------------------------------------------------------------
# Multiplet rate / expected counts
# ---------------------------------------------------------------------
def lookup_multiplet_rate(
    n_cells: int,
    table: Sequence[Tuple[int, float]] = MULTIPLET_RATE_TABLE,
) -> float:
    """
    Rate of the largest table bin whose recovered-cell count is <= n_cells.
    Cell counts below the first bin have no defined rate.
    """
    bins = sorted(table)
    if n_cells < bins[0][0]:
        raise DoubletConfigurationError(
            f"Cannot determine multiplet rate for {n_cells} cells: the loading table "
            f"starts at {bins[0][0]} cells. Provide multiplet_rate explicitly."
        )

    rate = bins[0][1]
    for cutoff, r in bins:
        if n_cells < cutoff:
            break
        rate = r
    return float(rate)


def homotypic_proportion(labels: Sequence) -> float:
    """Probability that two random cells share a provisional community."""
    s = pd.Series(np.asarray(labels))
    if s.empty:
        raise DoubletComputationError("Cannot model homotypic doublets on an empty partition")
    props = s.value_counts(normalize=True).to_numpy()
    return float(np.sum(props ** 2))


def expected_doublet_count(
    n_cells: int,
    multiplet_rate: float,
    homotypic_prop: float,
) -> Tuple[int, int]:
    """
    (expected doublets, expected detectable doublets). Both steps round, in
    that order: round(round(rate * n) * (1 - homotypic)).
    """
    n_expected = int(round(multiplet_rate * n_cells))
    n_adjusted = int(round(n_expected * (1.0 - homotypic_prop)))
    return n_expected, n_adjusted


# ---------------------------------------------------------------------
# PC selection
# ---------------------------------------------------------------------
def select_n_pcs(
    variance_pct: Sequence[float],
    *,
    cumulative_threshold: float = 90.0,
    component_threshold: float = 5.0,
    step_threshold: float = 0.1,
    fallback: int = 10,
) -> PCSelection:
    """
    Number of informative PCs from a per-component explained-variance curve
    (in percent).

    a) first component where cumulative variance > cumulative_threshold and the
       component's own variance < component_threshold;
    b) last component whose drop to the next one exceeds step_threshold
       percentage points, plus one.

    Returns min(a, b). A heuristic with no hit uses `fallback` and emits a
    PCSelectionWarning.
    """
    pct = np.asarray(variance_pct, dtype=float)
    if pct.ndim != 1 or pct.size == 0:
        raise ValueError("variance_pct must be a non-empty 1-D sequence")

    cumulative = np.cumsum(pct)
    hits = np.flatnonzero((cumulative > cumulative_threshold) & (pct < component_threshold))
    by_cumulative = int(hits[0]) + 1 if hits.size else None

    steps = pct[:-1] - pct[1:]
    drops = np.flatnonzero(steps > step_threshold)
    by_difference = int(drops[-1]) + 2 if drops.size else None

    used_fallback = False
    if by_cumulative is None:
        msg = (
            f"No component reaches {cumulative_threshold:g}% cumulative variance with "
            f"<{component_threshold:g}% individual variance; using fallback n_pcs={fallback}"
        )
        warnings.warn(msg, PCSelectionWarning, stacklevel=2)
        LOGGER.warning(msg)
        used_fallback = True
    if by_difference is None:
        msg = (
            f"No consecutive explained-variance drop exceeds {step_threshold:g} points; "
            f"using fallback n_pcs={fallback}"
        )
        warnings.warn(msg, PCSelectionWarning, stacklevel=2)
        LOGGER.warning(msg)
        used_fallback = True

    a = by_cumulative if by_cumulative is not None else fallback
    b = by_difference if by_difference is not None else fallback
    n_pcs = int(min(a, b, pct.size))

    return PCSelection(
        n_pcs=n_pcs,
        by_cumulative=by_cumulative,
        by_difference=by_difference,
        used_fallback=used_fallback,
    )


# ---------------------------------------------------------------------
# Embedding helpers
# ---------------------------------------------------------------------
def _as_csr(counts) -> sp.csr_matrix:
    if sp.issparse(counts):
        return sp.csr_matrix(counts, dtype=np.float32)
    return sp.csr_matrix(np.asarray(counts, dtype=np.float32))


def _seed_int(seq: np.random.SeedSequence) -> int:
    return int(seq.generate_state(1)[0])


def embed_counts(
    counts,
    *,
    n_top_genes: int,
    n_comps: int,
    random_state: Optional[int],
) -> Tuple[np.ndarray, np.ndarray]:
    """
    log-normalize -> variable genes -> scale -> PCA on a cells x genes count
    matrix. Returns (X_pca, variance_ratio).
    """
    X = _as_csr(counts)

    detected = np.asarray((X > 0).sum(axis=0)).ravel() > 0
    if detected.sum() < 3:
        raise DoubletComputationError(
            f"Only {int(detected.sum())} detected genes; cannot embed sample"
        )
    X = X[:, detected]

    a = ad.AnnData(X=X)
    sc.pp.normalize_total(a, target_sum=1e4)
    sc.pp.log1p(a)
    sc.pp.highly_variable_genes(
        a,
        n_top_genes=min(n_top_genes, a.n_vars),
        flavor="seurat",
    )
    hvg = a.var["highly_variable"].to_numpy()
    if hvg.sum() < 3:
        raise DoubletComputationError("Fewer than 3 variable genes; cannot run PCA")

    a = a[:, hvg].copy()
    sc.pp.scale(a, max_value=10)

    n_comps = min(int(n_comps), a.n_obs - 1, a.n_vars - 1)
    if n_comps < 2:
        raise DoubletComputationError(
            f"Too few cells/genes for PCA ({a.n_obs} cells x {a.n_vars} genes)"
        )

    sc.tl.pca(a, n_comps=n_comps, svd_solver="arpack", random_state=random_state)
    return np.asarray(a.obsm["X_pca"]), np.asarray(a.uns["pca"]["variance_ratio"])


def provisional_partition(
    X_pca: np.ndarray,
    *,
    resolution: float,
    n_neighbors: int = 20,
    random_state: Optional[int] = 0,
) -> np.ndarray:
    """Low-resolution Leiden partition used only for the homotypic estimate."""
    n = X_pca.shape[0]
    if n < 3:
        raise DoubletComputationError("Need at least 3 cells for a provisional partition")

    a = ad.AnnData(obs=pd.DataFrame(index=[str(i) for i in range(n)]))
    a.obsm["X_pca"] = np.asarray(X_pca, dtype=np.float32)

    sc.pp.neighbors(
        a,
        n_neighbors=min(n_neighbors, n - 1),
        use_rep="X_pca",
        random_state=0 if random_state is None else random_state,
    )
    sc.tl.leiden(
        a,
        resolution=resolution,
        key_added="provisional",
        flavor="igraph",
        n_iterations=2,
        directed=False,
        random_state=0 if random_state is None else random_state,
    )
    labels = a.obs["provisional"].astype(str).to_numpy()
    if labels.size == 0:
        raise DoubletComputationError("Provisional clustering returned no labels")
    return labels


# ---------------------------------------------------------------------
# Synthetic doublets + pANN
# ---------------------------------------------------------------------
def n_synthetic_doublets(n_real: int, pN: float) -> int:
    """Number of synthetic doublets so that they make up a pN share of the merged set."""
    return int(round(n_real / (1.0 - pN) - n_real))


def synthesize_doublets(counts, n_doublets: int, rng: np.random.Generator) -> sp.csr_matrix:
    """Average the profiles of n_doublets random (with replacement) real-cell pairs."""
    X = _as_csr(counts)
    n = X.shape[0]
    first = rng.integers(0, n, size=n_doublets)
    second = rng.integers(0, n, size=n_doublets)
    return ((X[first] + X[second]) * 0.5).tocsr()


def _drop_self(idx: np.ndarray, k: int) -> np.ndarray:
    """First k neighbours of every row, skipping the query cell itself."""
    is_self = idx == np.arange(idx.shape[0])[:, None]
    order = np.argsort(is_self, axis=1, kind="stable")
    return np.take_along_axis(idx, order, axis=1)[:, :k]


def compute_pann(
    counts,
    *,
    pN: float,
    pK_values: Sequence[float],
    n_pcs: int,
    n_top_genes: int,
    random_state: Optional[int],
    clip_k: bool = False,
) -> Dict[float, np.ndarray]:
    """
    Proportion of artificial nearest neighbours of every real cell for each pK.

    pK values whose neighbourhood rounds to zero cells are skipped unless
    `clip_k`, which raises them to one neighbour.
    """
    rng = np.random.default_rng(random_state)
    real = _as_csr(counts)
    n_real = real.shape[0]

    n_syn = n_synthetic_doublets(n_real, pN)
    if n_syn < 1:
        raise DoubletComputationError(f"pN={pN} yields no synthetic doublets for {n_real} cells")

    merged = sp.vstack([real, synthesize_doublets(real, n_syn, rng)]).tocsr()
    n_total = merged.shape[0]

    X_pca, _ = embed_counts(
        merged,
        n_top_genes=n_top_genes,
        n_comps=n_pcs,
        random_state=int(rng.integers(0, 2**31 - 1)),
    )

    ks: Dict[float, int] = {}
    for pK in pK_values:
        k = int(round(n_total * pK))
        if clip_k:
            k = max(k, 1)
        if k >= 1:
            ks[float(pK)] = min(k, n_total - 1)
    if not ks:
        raise DoubletComputationError(
            f"No pK value yields at least one neighbour for {n_total} merged cells"
        )

    k_max = max(ks.values())
    nn = NearestNeighbors(n_neighbors=k_max + 1).fit(X_pca)
    _, idx = nn.kneighbors(X_pca[:n_real])
    idx = _drop_self(idx, k_max)

    n_synthetic_seen = np.cumsum(idx >= n_real, axis=1)
    return {pK: n_synthetic_seen[:, k - 1] / float(k) for pK, k in ks.items()}


# ---------------------------------------------------------------------
# Sweep + pK selection
# ---------------------------------------------------------------------
def bimodality_coefficient(values: Sequence[float]) -> float:
    """
    Sarle's bimodality coefficient with bias-corrected skewness and excess
    kurtosis. NaN for fewer than 4 values or a constant distribution.
    """
    x = np.asarray(values, dtype=float)
    n = x.size
    if n < 4 or np.ptp(x) == 0:
        return float("nan")

    g = stats.skew(x, bias=False)
    kappa = stats.kurtosis(x, fisher=True, bias=False)
    return float((g ** 2 + 1.0) / (kappa + 3.0 * (n - 1) ** 2 / ((n - 2) * (n - 3))))


def _sweep_one_pn(
    counts,
    pN: float,
    pK_grid: Sequence[float],
    n_pcs: int,
    n_top_genes: int,
    seed: int,
) -> pd.DataFrame:
    pann = compute_pann(
        counts,
        pN=pN,
        pK_values=pK_grid,
        n_pcs=n_pcs,
        n_top_genes=n_top_genes,
        random_state=seed,
    )
    return pd.DataFrame(
        {
            "pN": pN,
            "pK": list(pann.keys()),
            "bimodality": [bimodality_coefficient(v) for v in pann.values()],
        }
    )


def run_param_sweep(
    counts,
    params: DoubletParams,
    *,
    n_pcs: int,
    random_state: Optional[int],
) -> pd.DataFrame:
    """
    Bimodality coefficient for every (pN, pK) cell. Each pN gets its own
    child seed, so results do not depend on how the grid is parallelized.
    """
    children = np.random.SeedSequence(random_state).spawn(len(params.pN_grid))

    frames = Parallel(n_jobs=params.sweep_n_jobs)(
        delayed(_sweep_one_pn)(
            counts,
            float(pN),
            params.pK_grid,
            n_pcs,
            params.n_top_genes,
            _seed_int(child),
        )
        for pN, child in zip(params.pN_grid, children)
    )
    return pd.concat(frames, ignore_index=True)


def compute_bcmvn(sweep: pd.DataFrame) -> pd.DataFrame:
    """
    Per pK: mean and variance of the bimodality coefficient across pN and
    their ratio (BCmvn). A pK whose variance is undefined or not positive
    (seen in a single pN, or constant across pN) is scored by its mean.
    """
    grouped = sweep.groupby("pK")["bimodality"]
    out = pd.DataFrame({"mean_bc": grouped.mean(), "var_bc": grouped.var(ddof=1)})

    mean = out["mean_bc"].to_numpy()
    var = out["var_bc"].to_numpy()
    usable = np.isfinite(var) & (var > 0)
    out["bcmvn"] = np.where(usable, mean / np.where(usable, var, 1.0), mean)
    return out.sort_index()


def select_optimal_pk(bcmvn: pd.DataFrame) -> float:
    """pK with the largest BCmvn; ties resolve to the smaller pK."""
    vals = bcmvn["bcmvn"].astype(float)
    if not np.isfinite(vals.to_numpy()).any():
        raise DoubletComputationError("No finite bimodality coefficient in the pK sweep")
    return float(vals.idxmax())


# ---------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------
def classify_doublets(
    pann: Sequence[float],
    cell_ids: Sequence[str],
    n_doublets: int,
) -> np.ndarray:
    """
    Label the n_doublets cells with the highest pANN as doublets. Ties are
    broken by ascending cell id.
    """
    pann = np.asarray(pann, dtype=float)
    ids = np.asarray(cell_ids, dtype=str)
    if pann.shape[0] != ids.shape[0]:
        raise ValueError("pann and cell_ids must have the same length")

    n_doublets = int(min(max(n_doublets, 0), pann.shape[0]))
    order = np.lexsort((ids, -pann))

    calls = np.full(pann.shape[0], SINGLET, dtype=object)
    calls[order[:n_doublets]] = DOUBLET
    return calls


# ---------------------------------------------------------------------
# Entry point (one sample)
# ---------------------------------------------------------------------
def detect_doublets(
    counts,
    cell_ids: Sequence[str],
    params: DoubletParams = DoubletParams(),
    *,
    sample: str = "sample",
    multiplet_rate: Optional[float] = None,
    random_state: Optional[int] = None,
) -> DoubletResult:
    """
    Classify every cell of one sample as singlet or doublet.

    Parameters
    ----------
    counts
        cells x genes raw count matrix (sparse or dense) for ONE sample.
    cell_ids
        Unique identifiers, one per row of `counts`. Labels are keyed by these.
    params
        Sweep grids and preprocessing settings.
    multiplet_rate
        Known multiplet rate; estimated from the loading table when None.
    random_state
        Seed for every stochastic step. None runs unseeded (logged).

    Raises
    ------
    DoubletConfigurationError
        Multiplet rate undefined for this cell count, or outside [0, 1].
    DoubletComputationError
        Numeric failure in preprocessing, clustering or the sweep.
    """
    ids = pd.Index(np.asarray(cell_ids, dtype=str))
    n_cells = int(counts.shape[0])

    if len(ids) != n_cells:
        raise ValueError(f"{len(ids)} cell ids for {n_cells} count rows")
    if not ids.is_unique:
        raise ValueError(f"[{sample}] cell ids are not unique")

    if multiplet_rate is None:
        rate = lookup_multiplet_rate(n_cells)
        rate_source = "table"
    else:
        if not (0.0 <= multiplet_rate <= 1.0):
            raise DoubletConfigurationError(
                f"multiplet_rate must be in [0, 1], got {multiplet_rate}"
            )
        rate = float(multiplet_rate)
        rate_source = "configured"

    if random_state is None:
        LOGGER.warning(
            "[%s] Doublet detection running without a random seed; "
            "synthetic doublets and calls will not be reproducible.",
            sample,
        )

    pca_seq, cluster_seq, sweep_seq, final_seq = np.random.SeedSequence(random_state).spawn(4)
    counts = _as_csr(counts)

    LOGGER.info("[%s] Doublet detection on %d cells (multiplet rate %.3f, %s)",
                sample, n_cells, rate, rate_source)

    # -- preprocessing + PC count
    X_pca, variance_ratio = embed_counts(
        counts,
        n_top_genes=params.n_top_genes,
        n_comps=params.max_pcs,
        random_state=_seed_int(pca_seq),
    )
    pcs = select_n_pcs(
        variance_ratio * 100.0,
        cumulative_threshold=params.cumulative_variance_pct,
        component_threshold=params.component_variance_pct,
        step_threshold=params.variance_step_pct,
        fallback=params.fallback_n_pcs,
    )
    n_pcs = min(pcs.n_pcs, X_pca.shape[1])
    LOGGER.info("[%s] Using %d PCs (cumulative rule=%s, difference rule=%s)",
                sample, n_pcs, pcs.by_cumulative, pcs.by_difference)

    # -- provisional partition -> homotypic share
    provisional = provisional_partition(
        X_pca[:, :n_pcs],
        resolution=params.provisional_resolution,
        n_neighbors=params.provisional_n_neighbors,
        random_state=_seed_int(cluster_seq),
    )
    homotypic = homotypic_proportion(provisional)

    # -- sweep
    sweep = run_param_sweep(counts, params, n_pcs=n_pcs, random_state=_seed_int(sweep_seq))
    bcmvn = compute_bcmvn(sweep)
    optimal_pk = select_optimal_pk(bcmvn)

    # -- expected detectable doublets
    n_expected, n_adjusted = expected_doublet_count(n_cells, rate, homotypic)

    # -- final call at the optimal pK
    pann = compute_pann(
        counts,
        pN=params.final_pN,
        pK_values=[optimal_pk],
        n_pcs=n_pcs,
        n_top_genes=params.n_top_genes,
        random_state=_seed_int(final_seq),
        clip_k=True,
    )[optimal_pk]
    calls = classify_doublets(pann, ids, n_adjusted)

    labels = pd.DataFrame(
        {
            "pANN": pann,
            "doublet_call": pd.Categorical(calls, categories=CALL_CATEGORIES),
            "provisional_cluster": provisional,
        },
        index=ids,
    )
    n_called = int((calls == DOUBLET).sum())

    summary = DoubletSummary(
        sample=str(sample),
        n_cells=n_cells,
        multiplet_rate=rate,
        rate_source=rate_source,
        n_pcs=int(n_pcs),
        n_pcs_by_cumulative=float("nan") if pcs.by_cumulative is None else float(pcs.by_cumulative),
        n_pcs_by_difference=float("nan") if pcs.by_difference is None else float(pcs.by_difference),
        optimal_pK=optimal_pk,
        n_provisional_clusters=int(pd.unique(provisional).size),
        homotypic_proportion=homotypic,
        n_expected=n_expected,
        n_expected_adjusted=n_adjusted,
        n_called=n_called,
    )

    LOGGER.info(
        "[%s] Doublets: optimal pK=%.4f, homotypic=%.3f, expected=%d, "
        "detectable=%d, called=%d / %d",
        sample,
        optimal_pk,
        homotypic,
        n_expected,
        n_adjusted,
        n_called,
        n_cells,
    )

    return DoubletResult(labels=labels, summary=summary, sweep=sweep, bcmvn=bcmvn)
