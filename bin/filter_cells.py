#!/usr/bin/env python
"""
Flag and filter low quality cells: hashtag doublets / negatives and cells with a
high fraction of mitochondrial counts.
"""

import argparse
from pathlib import Path

import anndata
import numpy as np
import pandas as pd
import scanpy as sc

from cart_utils.base_logger import logger
from cart_utils.options import QCOptions, load_options
from cart_utils.validation import ensure_not_empty
from hto_demux import codes


def add_qc_metrics(adata: anndata.AnnData, options: QCOptions) -> anndata.AnnData:
    """
    Per-cell feature counts, total counts and mitochondrial fraction, computed on raw counts

    Returns:
        New AnnData with n_genes_by_counts, total_counts and mito_fraction in obs
        and the mitochondrial gene flag 'mt' in var
    """
    adata = adata.copy()
    adata.var["mt"] = adata.var_names.str.upper().str.startswith(options.mito_prefix.upper())
    layer = "counts" if "counts" in adata.layers else None
    metrics, _ = sc.pp.calculate_qc_metrics(adata, qc_vars=["mt"], layer=layer, percent_top=None, inplace=False)
    adata.obs["n_genes_by_counts"] = metrics["n_genes_by_counts"].to_numpy()
    adata.obs["total_counts"] = metrics["total_counts"].to_numpy()
    # cells without counts have an undefined fraction and fail the mito gate
    adata.obs["mito_fraction"] = (metrics["pct_counts_mt"] / 100).to_numpy()
    return adata


def flag_cells(adata: anndata.AnnData, options: QCOptions) -> tuple[anndata.AnnData, pd.DataFrame]:
    """
    Flag cells failing QC gates. All gates must pass for a cell to be kept.
    'pass' and 'flags' are set on every cell; no cell is removed.

    Args:
        adata: Cells annotated with hto_classification
        options: QC options

    Returns:
        New AnnData with QC metrics, pass and flags in obs
        Metrics about QC filtering
    """
    adata = add_qc_metrics(adata, options)
    flags = pd.Series("", index=adata.obs_names)
    stats = []
    if options.singlets_only and "hto_classification" in adata.obs:
        labels = adata.obs["hto_classification"].astype(str)
        flags[labels == codes.doublet] += ";doublet"
        flags[labels == codes.negative] += ";negative"
        stats.append(("QC", "doublets", int((labels == codes.doublet).sum())))
        stats.append(("QC", "negatives", int((labels == codes.negative).sum())))
    mito = adata.obs["mito_fraction"]
    high_mito = ~(mito <= options.max_mito_fraction)
    flags[high_mito.to_numpy()] += ";high_mito"
    stats.append(("QC", "maximum_mito", options.max_mito_fraction))
    stats.append(("QC", "high_mito", int(high_mito.sum())))
    n_features = adata.obs["n_genes_by_counts"]
    if options.min_features:
        flags[(n_features < options.min_features).to_numpy()] += ";low_features"
        stats.append(("QC", "minimum_features", options.min_features))
    if options.max_features:
        flags[(n_features > options.max_features).to_numpy()] += ";high_features"
        stats.append(("QC", "maximum_features", options.max_features))
    adata.obs["flags"] = flags.str.strip(";").to_numpy()
    adata.obs["pass"] = (adata.obs["flags"] == "").to_numpy()
    stats.append(("QC", "passing_cells", int(adata.obs["pass"].sum())))
    logger.debug(f"{adata.obs['pass'].sum()} of {adata.n_obs} cells pass QC")
    return adata, pd.DataFrame.from_records(stats, columns=["Category", "Metric", "Value"])


def filter_cells(adata: anndata.AnnData, options: QCOptions) -> anndata.AnnData:
    """
    Keep only cells passing all QC gates

    Args:
        adata: Cells annotated with hto_classification
        options: QC options

    Returns:
        New AnnData holding the passing cells
    """
    flagged, _ = flag_cells(adata, options)
    ensure_not_empty(int(flagged.obs["pass"].sum()), "Quality filtering")
    return flagged[flagged.obs["pass"].to_numpy()].copy()


def main(demux_h5ad: Path, config: Path, id: str, out_dir: Path):
    options = load_options(config)
    adata = anndata.read_h5ad(demux_h5ad)
    flagged, stats = flag_cells(adata, options.qc)
    out_dir.mkdir(parents=True, exist_ok=True)
    flagged.obs.to_csv(out_dir / f"{id}_allCells.csv", index_label="cell_id")
    stats.to_csv(out_dir / f"{id}_qc_stats.csv", index=False)
    ensure_not_empty(int(flagged.obs["pass"].sum()), "Quality filtering")
    flagged[flagged.obs["pass"].to_numpy()].copy().write_h5ad(out_dir / f"{id}.filtered.h5ad")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Flag and filter low quality cells")
    parser.add_argument("--demux", type=Path, required=True, help="Demultiplexed AnnData (.h5ad)")
    parser.add_argument("--config", type=Path, help="Analysis options JSON")
    parser.add_argument("--id", required=True, help="Sample name used as output prefix")
    parser.add_argument("--outDir", type=Path, default=Path("."), help="Directory for outputs")
    args = parser.parse_args()
    main(args.demux, args.config, args.id, args.outDir)
