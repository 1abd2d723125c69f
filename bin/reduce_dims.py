#!/usr/bin/env python
"""
Principal component analysis of the scaled variable features and a 2D UMAP
embedding from the leading components
"""

import argparse
from pathlib import Path

import anndata
import numpy as np
import pandas as pd
import scanpy as sc

from cart_utils.base_logger import logger
from cart_utils.options import ReductionOptions, load_options
from cluster_cells import build_neighbor_graph
from normalize_features import scale_variable_features

UMAP_NEIGHBORS_KEY = "umap_neighbors"


def run_pca(adata: anndata.AnnData, options: ReductionOptions, seed: int = 0) -> anndata.AnnData:
    """
    PCA of the scaled variable features. The number of components is capped below
    the rank of the scaled matrix.

    Args:
        adata: Log-normalized cells with highly_variable in var
        options: Reduction options
        seed: Random seed of the solver

    Returns:
        New AnnData with obsm['X_pca'], varm['PCs'] (zero for non-variable genes) and uns['pca']
    """
    scaled = scale_variable_features(adata, options.scale_max_value)
    n_comps = min(options.n_comps, min(scaled.shape) - 1)
    if n_comps < options.n_comps:
        logger.warning(f"Only {n_comps} principal components can be computed for a {scaled.shape} matrix")
    sc.pp.pca(scaled, n_comps=n_comps, svd_solver="arpack", random_state=seed, zero_center=True)

    adata = adata.copy()
    adata.obsm["X_pca"] = scaled.obsm["X_pca"]
    loadings = np.zeros((adata.n_vars, n_comps))
    loadings[adata.var["highly_variable"].to_numpy()] = scaled.varm["PCs"]
    adata.varm["PCs"] = loadings
    adata.uns["pca"] = {
        "variance": scaled.uns["pca"]["variance"],
        "variance_ratio": scaled.uns["pca"]["variance_ratio"],
        "params": {"n_comps": n_comps, "random_state": seed, "scale_max_value": options.scale_max_value},
    }
    return adata


def explained_variance(adata: anndata.AnnData) -> pd.DataFrame:
    """Variance explained by each principal component, for choosing how many to use"""
    ratio = np.asarray(adata.uns["pca"]["variance_ratio"])
    return pd.DataFrame(
        {
            "component": np.arange(1, len(ratio) + 1),
            "variance": np.asarray(adata.uns["pca"]["variance"]),
            "variance_ratio": ratio,
            "cumulative_ratio": np.cumsum(ratio),
        }
    )


def run_umap(adata: anndata.AnnData, options: ReductionOptions, seed: int = 0) -> anndata.AnnData:
    """
    UMAP embedding from the first n_pcs principal components, on its own neighbor graph

    Returns:
        New AnnData with obsm['X_umap']
    """
    adata = adata.copy()
    build_neighbor_graph(
        adata,
        n_pcs=options.n_pcs,
        n_neighbors=options.n_neighbors,
        seed=seed,
        key_added=UMAP_NEIGHBORS_KEY,
    )
    sc.tl.umap(adata, min_dist=options.min_dist, random_state=options.umap_seed, neighbors_key=UMAP_NEIGHBORS_KEY)
    return adata


def reduce_dims(adata: anndata.AnnData, options: ReductionOptions, seed: int = 0) -> anndata.AnnData:
    return run_umap(run_pca(adata, options, seed), options, seed)


def main(normalized_h5ad: Path, config: Path, id: str, out_dir: Path):
    options = load_options(config)
    adata = reduce_dims(anndata.read_h5ad(normalized_h5ad), options.reduction, options.seed)
    out_dir.mkdir(parents=True, exist_ok=True)
    adata.write_h5ad(out_dir / f"{id}.reduced.h5ad")
    explained_variance(adata).to_csv(out_dir / f"{id}_pca_variance.csv", index=False)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Compute PCA and UMAP embeddings")
    parser.add_argument("--normalized", type=Path, required=True, help="Normalized AnnData (.h5ad)")
    parser.add_argument("--config", type=Path, help="Analysis options JSON")
    parser.add_argument("--id", required=True, help="Sample name used as output prefix")
    parser.add_argument("--outDir", type=Path, default=Path("."), help="Directory for outputs")
    args = parser.parse_args()
    main(args.normalized, args.config, args.id, args.outDir)
