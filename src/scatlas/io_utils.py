from __future__ import annotations

import glob
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import anndata as ad
import numpy as np
import pandas as pd
import scanpy as sc
import scipy.sparse as sp
import zarr

LOGGER = logging.getLogger(__name__)

# Layouts an aligner run may leave behind for the filtered matrix
MATRIX_SUBDIRS = ("", "outs/filtered_feature_bc_matrix", "filtered_feature_bc_matrix")
SAMPLE_PREFIX = "run_count_"
SAMPLE_SUFFIXES = (".filtered_feature_bc_matrix",)


# =====================================================================
# Sample discovery
# =====================================================================
def _has_matrix_triple(d: Path) -> bool:
    has_mtx = any((d / f).exists() for f in ("matrix.mtx", "matrix.mtx.gz"))
    has_bc = any((d / f).exists() for f in ("barcodes.tsv", "barcodes.tsv.gz"))
    has_feat = any(
        (d / f).exists() for f in ("features.tsv", "features.tsv.gz", "genes.tsv")
    )
    return has_mtx and has_bc and has_feat


def resolve_matrix_dir(sample_path: Path) -> Optional[Path]:
    """Directory holding the barcodes/features/matrix triple of a sample folder, if any."""
    for sub in MATRIX_SUBDIRS:
        d = sample_path / sub if sub else sample_path
        if d.is_dir() and _has_matrix_triple(d):
            return d
    return None


def sample_id_from_dir(sample_path: Path) -> str:
    name = sample_path.name
    if name.startswith(SAMPLE_PREFIX):
        name = name[len(SAMPLE_PREFIX):]
    for suffix in SAMPLE_SUFFIXES:
        if name.endswith(suffix):
            name = name[: -len(suffix)]
    return name


def detect_sample_dirs(base: Path, pattern: str = "*") -> Dict[str, Path]:
    """
    Map sample id -> matrix directory for every folder under `base` that
    matches `pattern` and holds a 10x matrix triple.
    """
    base = Path(base)
    if not base.is_dir():
        raise FileNotFoundError(f"Sample directory not found: {base}")

    out: Dict[str, Path] = {}
    for p in sorted(Path(x) for x in glob.glob(str(base / pattern))):
        if not p.is_dir():
            continue
        mdir = resolve_matrix_dir(p)
        if mdir is None:
            LOGGER.debug("Skipping %s (no matrix files)", p)
            continue
        sid = sample_id_from_dir(p)
        if sid in out:
            raise ValueError(f"Duplicate sample id '{sid}' from {out[sid]} and {mdir}")
        out[sid] = mdir

    if not out:
        raise FileNotFoundError(
            f"No 10x matrix folders found under {base} matching '{pattern}'"
        )
    return out


# =====================================================================
# Loading
# =====================================================================
def read_10x(matrix_dir: Path) -> ad.AnnData:
    adata = sc.read_10x_mtx(str(matrix_dir), var_names="gene_symbols", cache=False)
    adata.var_names_make_unique()
    return adata


def load_samples(
    sample_dirs: Dict[str, Path],
    n_jobs: int = 4,
) -> Tuple[Dict[str, ad.AnnData], Dict[str, float]]:
    """
    Load every sample in a thread pool. Any failed sample aborts the load
    after all others have been attempted.
    """
    out: Dict[str, ad.AnnData] = {}
    read_counts: Dict[str, float] = {}
    failed: Dict[str, str] = {}

    n_workers = min(8, n_jobs) if n_jobs else 8
    LOGGER.info("Parallel 10X loading with %d I/O threads", n_workers)

    def _load_one(sample: str, mdir: Path):
        try:
            adata = read_10x(mdir)
            return ("ok", sample, adata, float(adata.X.sum()))
        except Exception as e:
            return ("fail", sample, f"{type(e).__name__}: {e}")

    with ThreadPoolExecutor(max_workers=n_workers) as pool:
        futures = [pool.submit(_load_one, s, d) for s, d in sample_dirs.items()]

        for fut in as_completed(futures):
            status, sample, *rest = fut.result()
            if status == "ok":
                adata, total = rest
                out[sample] = adata
                read_counts[sample] = total
                LOGGER.info(
                    "[I/O] Loaded %s: %d cells, %d genes, %.2e UMIs",
                    sample, adata.n_obs, adata.n_vars, total,
                )
            else:
                LOGGER.error("[FAIL] %s: %s", sample, rest[0])
                failed[sample] = rest[0]

    if failed:
        raise RuntimeError(
            f"Loading failed for {len(failed)} samples: {', '.join(sorted(failed))}"
        )

    return {k: out[k] for k in sorted(out)}, read_counts


# =====================================================================
# Metadata
# =====================================================================
def infer_batch_key_from_metadata_tsv(metadata_tsv: Path, user_batch_key: Optional[str]) -> str:
    """Infer or validate batch_key using only the metadata TSV header."""
    meta = pd.read_csv(metadata_tsv, sep="\t", nrows=0)
    cols = set(meta.columns)

    if user_batch_key is not None:
        if user_batch_key not in cols:
            raise KeyError(
                f"batch_key '{user_batch_key}' not found in metadata columns: {sorted(cols)}"
            )
        return user_batch_key

    for cand in ("sample", "sample_id", "batch"):
        if cand in cols:
            LOGGER.warning(
                "No batch_key provided. Inferred batch_key='%s' from metadata.tsv. "
                "Please verify this is correct.", cand
            )
            return cand

    raise KeyError(
        f"Could not infer batch_key. metadata.tsv does not contain any of: "
        f"'sample', 'sample_id', 'batch'. Metadata columns: {sorted(cols)}"
    )


def infer_batch_key(adata: ad.AnnData, explicit_batch_key: Optional[str] = None) -> str:
    if explicit_batch_key is not None:
        if explicit_batch_key not in adata.obs:
            raise KeyError(
                f"batch_key '{explicit_batch_key}' not found in adata.obs. "
                f"Available columns: {list(adata.obs.columns)}"
            )
        return explicit_batch_key

    # a recorded key from an earlier stage wins over guessing
    recorded = adata.uns.get("batch_key")
    if isinstance(recorded, str) and recorded in adata.obs:
        return recorded

    for cand in ("sample_id", "sample", "batch"):
        if cand in adata.obs:
            LOGGER.warning(
                "Inferring batch_key='%s'. If this is incorrect, specify --batch-key explicitly.",
                cand,
            )
            return cand

    raise KeyError(
        "Could not infer batch_key automatically. None of ['sample_id', 'sample', 'batch'] "
        "found in adata.obs. Specify --batch-key explicitly."
    )


def validate_metadata_samples(meta: pd.DataFrame, batch_key: str, samples: List[str]) -> None:
    """Metadata must hold exactly one row per loaded sample."""
    if batch_key not in meta.columns:
        raise KeyError(
            f"Metadata TSV must contain the batch key column '{batch_key}'. "
            f"Found columns: {list(meta.columns)}"
        )

    meta_samples = pd.Index(meta[batch_key].astype(str))
    loaded = pd.Index(samples).astype(str)

    if meta_samples.has_duplicates:
        dups = meta_samples[meta_samples.duplicated()].unique()
        raise ValueError(f"metadata_tsv has duplicate rows for samples: {list(dups)}")

    missing_rows = loaded.difference(meta_samples)
    if len(missing_rows) > 0:
        raise ValueError(
            "The following samples were found in the input data but "
            f"are missing from metadata_tsv:\n  {list(missing_rows)}"
        )

    extra_rows = meta_samples.difference(loaded)
    if len(extra_rows) > 0:
        raise ValueError(
            "The following samples exist in metadata_tsv but were not found "
            f"in the input data folders:\n  {list(extra_rows)}"
        )


def add_metadata(
    adata: ad.AnnData,
    metadata_tsv: Path,
    batch_key: str,
    expected_samples: Optional[List[str]] = None,
) -> ad.AnnData:
    """
    Attach per-sample metadata columns to obs (in place), joined on batch_key.
    Rows are validated against `expected_samples` (all loaded samples, including
    ones dropped by QC) or, if not given, the samples present in obs.
    Low-cardinality string columns become categoricals.
    """
    if not Path(metadata_tsv).exists():
        raise FileNotFoundError(f"Metadata TSV not found: {metadata_tsv}")

    meta = pd.read_csv(metadata_tsv, sep="\t")
    samples = expected_samples or list(pd.unique(adata.obs[batch_key].astype(str)))
    validate_metadata_samples(meta, batch_key, samples)

    meta[batch_key] = meta[batch_key].astype(str)
    meta = meta.set_index(batch_key)
    keys = adata.obs[batch_key].astype(str)

    for col in meta.columns:
        adata.obs[col] = keys.map(meta[col]).values
        if (
            adata.obs[col].dtype == object
            and adata.obs[col].nunique() < 0.1 * adata.n_obs
        ):
            adata.obs[col] = adata.obs[col].astype("category")

    return adata


# =====================================================================
# Merge / split
# =====================================================================
def merge_samples(sample_map: Dict[str, ad.AnnData], batch_key: str) -> ad.AnnData:
    """
    Concatenate per-sample objects. Cell ids become '<barcode>-<sample>' so they
    are unique across samples; raw counts are copied into layers['counts'].
    """
    if not sample_map:
        raise RuntimeError("merge_samples: sample_map is empty.")

    keys = sorted(sample_map)
    merged = ad.concat(
        [sample_map[k] for k in keys],
        label=batch_key,
        keys=keys,
        index_unique="-",
        join="outer",
        merge="same",
    )
    if not sp.issparse(merged.X):
        merged.X = sp.csr_matrix(merged.X)
    merged.obs[batch_key] = merged.obs[batch_key].astype("category")
    merged.layers["counts"] = merged.X.copy()
    merged.uns["batch_key"] = batch_key

    if not merged.obs_names.is_unique:
        raise ValueError("Merged cell identifiers are not unique")

    LOGGER.info(
        "Merged %d samples: %d cells x %d genes", len(keys), merged.n_obs, merged.n_vars
    )
    return merged


def split_by_sample(
    adata: ad.AnnData,
    batch_key: str,
    layer: Optional[str] = None,
) -> Dict[str, ad.AnnData]:
    """
    Per-sample AnnData views copied out of a merged object. X holds `layer`
    when given (raw counts for doublet detection).
    """
    if batch_key not in adata.obs:
        raise KeyError(f"batch_key '{batch_key}' not in adata.obs")
    if layer is not None and layer not in adata.layers:
        raise KeyError(
            f"Layer '{layer}' not found. Available layers: {list(adata.layers.keys())}"
        )

    out: Dict[str, ad.AnnData] = {}
    labels = adata.obs[batch_key].astype(str).to_numpy()
    for sample in sorted(pd.unique(labels)):
        mask = labels == sample
        X = adata.layers[layer][mask] if layer is not None else adata.X[mask]
        out[sample] = ad.AnnData(
            X=X.copy(),
            obs=adata.obs.loc[mask, []].copy(),
            var=pd.DataFrame(index=adata.var_names.copy()),
        )
    return out


# =====================================================================
# Checkpoints
# =====================================================================
def _is_zarr_store(path: Path) -> bool:
    try:
        zarr.open_group(str(path), mode="r")
    except Exception:
        return False
    return True


def save_dataset(adata: ad.AnnData, out_path: Path) -> Path:
    """Write .h5ad (gzip) or .zarr, chosen by suffix."""
    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)

    if out_path.suffix == ".zarr":
        adata.write_zarr(str(out_path))
    elif out_path.suffix == ".h5ad":
        adata.write_h5ad(str(out_path), compression="gzip")
    else:
        raise ValueError(f"Unsupported checkpoint suffix '{out_path.suffix}' ({out_path})")

    LOGGER.info("Wrote %s", out_path)
    return out_path


def load_dataset(path: Path) -> ad.AnnData:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Dataset not found: {path}")

    if path.suffix == ".zarr" or (path.is_dir() and _is_zarr_store(path)):
        LOGGER.info("Loading Zarr store -> %s", path)
        return ad.read_zarr(str(path))

    LOGGER.info("Loading H5AD -> %s", path)
    return ad.read_h5ad(str(path))


# =====================================================================
# Tables
# =====================================================================
def export_table(df: pd.DataFrame, out_path: Path, index: bool = False) -> Path:
    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(out_path, index=index)
    LOGGER.info("Exported %d rows -> %s", len(df), out_path)
    return out_path


def export_obs_columns(adata: ad.AnnData, columns: List[str], out_path: Path) -> Path:
    missing = [c for c in columns if c not in adata.obs]
    if missing:
        raise KeyError(f"obs columns not found: {missing}")
    df = adata.obs[columns].copy()
    df.index.name = "cell"
    return export_table(df.reset_index(), out_path)


def counts_matrix(adata: ad.AnnData, layer: Optional[str] = None):
    """Raw count matrix of an AnnData as CSR."""
    X = adata.layers[layer] if layer is not None else adata.X
    if sp.issparse(X):
        return X.tocsr()
    return sp.csr_matrix(np.asarray(X))
