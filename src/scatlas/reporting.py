import html
import json
import os
from collections import defaultdict
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Mapping, Optional

import pandas as pd

from . import __version__


# ======================================================================
# Public API
# ======================================================================

def generate_stage_report(
    *,
    stage: str,
    figdir: Path,
    out_html: Path,
    params: Mapping,
    summary: Mapping,
    tables: Optional[Mapping[str, pd.DataFrame]] = None,
) -> Path:
    """
    Write a self-contained HTML report for one stage: parameters, summary
    statistics, optional tables and every PNG under <figdir>/png grouped
    by subdirectory.
    """
    figdir = Path(figdir).resolve()
    out_html = Path(out_html)
    out_html.parent.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    title = f"scAtlas {stage.replace('_', ' ')} report"

    # ------------------------------------------------------------------
    # Header
    # ------------------------------------------------------------------
    params_json = json.dumps(dict(params), indent=2, default=str)
    header = f"""
    <h1>{html.escape(title)}</h1>

    <div class="meta">
    Version:   {__version__}
    Timestamp: {timestamp}

    Parameters:
    {html.escape(params_json)}
    </div>
    """

    body = [header, render_summary_table(summary)]

    for name, df in (tables or {}).items():
        if df is None or df.empty:
            continue
        body.append(f"<h2>{html.escape(name)}</h2>")
        body.append(df.to_html(index=False, classes="summary", border=0, float_format="%.4g"))

    # ------------------------------------------------------------------
    # Figures
    # ------------------------------------------------------------------
    for section, imgs in collect_sections(figdir / "png").items():
        body.append(f"<details open><summary><h2>{html.escape(section)}</h2></summary>")
        body.append('<div class="grid">')
        for p in imgs:
            body.append(render_image_block(p, out_html.parent.resolve()))
        body.append("</div>")
        body.append("</details>")

    html_doc = f"""
    <!DOCTYPE html>
    <html>
    <head>
      <meta charset="utf-8">
      <title>{html.escape(title)}</title>
      <style>{CSS}</style>
    </head>
    <body>
      {''.join(body)}
    </body>
    </html>
    """

    out_html.write_text(html_doc, encoding="utf-8")
    return out_html


def dataset_summary(
    adata,
    *,
    batch_key: Optional[str] = None,
    label_key: Optional[str] = None,
) -> Dict[str, object]:
    """Cells, genes, samples, doublets, clusters and QC medians of a dataset."""
    obs = adata.obs
    summary: Dict[str, object] = {
        "n_cells": int(adata.n_obs),
        "n_genes": int(adata.n_vars),
    }

    batch_key = batch_key or adata.uns.get("batch_key")
    if batch_key is not None and batch_key in obs:
        summary["n_samples"] = int(obs[batch_key].nunique())

    if "doublet_call" in obs:
        calls = obs["doublet_call"].astype(object)
        summary["n_doublets_called"] = int((calls == "doublet").sum())
    if "doublet_status" in obs:
        summary["n_cells_without_doublet_call"] = int((obs["doublet_status"] != "called").sum())

    if label_key is not None and label_key in obs:
        summary[f"n_{label_key}"] = int(obs[label_key].nunique())

    for col in ["total_counts", "n_genes_by_counts", "pct_counts_mt"]:
        if col in obs:
            summary[f"median_{col}"] = float(obs[col].median())

    return summary


# ======================================================================
# Helpers
# ======================================================================

CSS = """
body {
  font-family: system-ui, -apple-system, sans-serif;
  margin: 2rem;
  max-width: 1400px;
}

h1, h2, h3 {
  margin-top: 1.5rem;
}

details > summary {
  cursor: pointer;
  font-weight: 600;
  margin: 0.5rem 0;
}

.meta {
  background: #f6f8fa;
  border: 1px solid #ddd;
  padding: 1rem;
  border-radius: 6px;
  font-family: monospace;
  white-space: pre-wrap;
}

figure {
  margin: 0.5rem;
}

figure img {
  max-width: 100%;
  border: 1px solid #ddd;
  border-radius: 4px;
}

figcaption {
  font-size: 0.85rem;
  color: #444;
  margin-top: 0.25rem;
}

.grid {
  display: grid;
  grid-template-columns: repeat(auto-fill, minmax(420px, 1fr));
  gap: 1rem;
}

table.summary {
  border-collapse: collapse;
  margin-top: 1rem;
  margin-bottom: 2rem;
}

table.summary th,
table.summary td {
  border: 1px solid #ccc;
  padding: 0.4rem 0.6rem;
  text-align: left;
}

table.summary th {
  background: #f0f0f0;
}
"""


def _caption_from_filename(fname: str) -> str:
    name = Path(fname).stem.replace("_", " ")
    name = name.replace("postfilter", "post-filter").replace("prefilter", "pre-filter")
    return name.capitalize()


def collect_sections(png_root: Path) -> Dict[str, List[Path]]:
    """PNG files grouped by their first directory below png_root."""
    sections: Dict[str, List[Path]] = defaultdict(list)
    if not png_root.exists():
        return sections
    for img in sorted(png_root.rglob("*.png")):
        rel = img.relative_to(png_root)
        key = rel.parts[0] if len(rel.parts) > 1 else "Other"
        sections[key.replace("_", " ")].append(img)
    return dict(sections)


def render_image_block(img_path: Path, rel_root: Path) -> str:
    caption = _caption_from_filename(img_path.name)
    src = Path(os.path.relpath(img_path, rel_root)).as_posix()
    return f"""
    <figure>
      <img src="{src}">
      <figcaption>{html.escape(caption)}</figcaption>
    </figure>
    """


def render_summary_table(summary: Mapping) -> str:
    rows = []
    for k, v in summary.items():
        val = f"{v:.4g}" if isinstance(v, float) else html.escape(str(v))
        rows.append(f"<tr><td>{html.escape(str(k))}</td><td>{val}</td></tr>")

    return f"""
    <h2>Summary statistics</h2>
    <table class="summary">
      <thead>
        <tr><th>Metric</th><th>Value</th></tr>
      </thead>
      <tbody>
        {''.join(rows)}
      </tbody>
    </table>
    """
