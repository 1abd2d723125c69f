#!/usr/bin/env python
"""
Log-normalize counts, select highly variable genes and scale them for PCA
"""

import argparse
from pathlib import Path

import anndata
import scanpy as sc

from cart_utils.base_logger import logger
from cart_utils.options import NormalizeOptions, load_options


def normalize(adata: anndata.AnnData, options: NormalizeOptions) -> anndata.AnnData:
    """
    log(1 + count / total_counts * scale_factor) for every cell.
    Raw counts are kept in layers['counts'] and are the input whenever that layer exists.

    Returns:
        New AnnData with log-normalized values in X
    """
    adata = adata.copy()
    if "counts" in adata.layers:
        adata.X = adata.layers["counts"].copy()
    else:
        adata.layers["counts"] = adata.X.copy()
    sc.pp.normalize_total(adata, target_sum=options.scale_factor)
    sc.pp.log1p(adata)
    return adata


def select_variable_features(adata: anndata.AnnData, options: NormalizeOptions) -> anndata.AnnData:
    """
    Rank genes by variance and flag the top n_top_genes as 'highly_variable'.
    'seurat_v3' ranks standardized variances of raw counts (vst), 'seurat' normalized
    dispersions of the log-normalized values.

    Returns:
        New AnnData with highly_variable annotations in var
    """
    adata = adata.copy()
    n_top_genes = min(options.n_top_genes, adata.n_vars)
    if options.flavor == "seurat_v3":
        sc.pp.highly_variable_genes(adata, n_top_genes=n_top_genes, flavor="seurat_v3", layer="counts")
    else:
        sc.pp.highly_variable_genes(adata, n_top_genes=n_top_genes, flavor="seurat")
    logger.debug(f"{adata.var['highly_variable'].sum()} variable features ({options.flavor})")
    return adata


def scale_variable_features(adata: anndata.AnnData, max_value: float = 10.0) -> anndata.AnnData:
    """
    Z-score each variable feature across cells, clipping at @max_value (0 disables clipping).
    Only used as PCA input; X of @adata is not modified.

    Returns:
        New AnnData holding the variable features only
    """
    scaled = adata[:, adata.var["highly_variable"].to_numpy()].copy()
    sc.pp.scale(scaled, zero_center=True, max_value=max_value or None)
    return scaled


def normalize_and_select(adata: anndata.AnnData, options: NormalizeOptions) -> anndata.AnnData:
    return select_variable_features(normalize(adata, options), options)


def main(filtered_h5ad: Path, config: Path, id: str, out_dir: Path):
    options = load_options(config)
    adata = normalize_and_select(anndata.read_h5ad(filtered_h5ad), options.normalize)
    out_dir.mkdir(parents=True, exist_ok=True)
    adata.write_h5ad(out_dir / f"{id}.normalized.h5ad")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Normalize counts and select variable features")
    parser.add_argument("--filtered", type=Path, required=True, help="Filtered AnnData (.h5ad)")
    parser.add_argument("--config", type=Path, help="Analysis options JSON")
    parser.add_argument("--id", required=True, help="Sample name used as output prefix")
    parser.add_argument("--outDir", type=Path, default=Path("."), help="Directory for outputs")
    args = parser.parse_args()
    main(args.filtered, args.config, args.id, args.outDir)
