#!/usr/bin/env python
"""
Build the nearest neighbor graph over principal components and partition cells
into clusters at one or more resolutions
"""

import argparse
from pathlib import Path

import anndata
import pandas as pd
import scanpy as sc
from natsort import natsorted

from cart_utils.base_logger import logger
from cart_utils.options import ClusterOptions, load_options
from cart_utils.validation import ParameterError, validate_positive


def cluster_key(resolution: float) -> str:
    """obs column holding the clusters of one resolution"""
    return f"leiden_res{resolution:g}"


def build_neighbor_graph(
    adata: anndata.AnnData,
    n_pcs: int,
    n_neighbors: int,
    metric: str = "euclidean",
    seed: int = 0,
    key_added: str | None = None,
) -> None:
    """
    Compute the k nearest neighbor graph over the first @n_pcs components of X_pca, in place.
    A graph already stored under the same key with the same parameters is kept.
    """
    if "X_pca" not in adata.obsm:
        raise ParameterError("Principal components are missing; run PCA first")
    n_pcs = min(n_pcs, adata.obsm["X_pca"].shape[1])
    key = key_added or "neighbors"
    params = adata.uns.get(key, {}).get("params", {})
    if (
        params.get("n_neighbors") == n_neighbors
        and params.get("metric") == metric
        and params.get("n_pcs") == n_pcs
        and params.get("random_state") == seed
    ):
        logger.debug(f"Reusing neighbor graph '{key}'")
        return
    sc.pp.neighbors(
        adata,
        n_neighbors=n_neighbors,
        n_pcs=n_pcs,
        use_rep="X_pca",
        metric=metric,
        random_state=seed,
        key_added=key_added,
    )
    # record what the graph was built from, scanpy does not store every parameter
    adata.uns[key]["params"].update({"n_neighbors": n_neighbors, "metric": metric, "n_pcs": n_pcs, "random_state": seed})


def cluster_cells(adata: anndata.AnnData, options: ClusterOptions, n_pcs: int, seed: int = 0) -> anndata.AnnData:
    """
    Leiden community detection on the neighbor graph at every configured resolution.
    Each resolution is stored in its own obs column; existing columns are left unchanged.

    Args:
        adata: Cells with X_pca
        options: Clustering options
        n_pcs: Number of principal components used for the graph
        seed: Random seed for graph construction and community detection

    Returns:
        New AnnData with one categorical cluster column per resolution
    """
    adata = adata.copy()
    build_neighbor_graph(adata, n_pcs=n_pcs, n_neighbors=options.n_neighbors, metric=options.metric, seed=seed)
    for resolution in options.resolutions:
        validate_positive(resolution, "resolution")
        key = cluster_key(resolution)
        sc.tl.leiden(
            adata,
            resolution=resolution,
            key_added=key,
            random_state=seed,
            flavor="igraph",
            n_iterations=2,
            directed=False,
        )
        labels = adata.obs[key].astype(str)
        adata.obs[key] = pd.Categorical(labels, categories=natsorted(labels.unique()))
        logger.info(f"Resolution {resolution:g}: {adata.obs[key].nunique()} clusters")
    return adata


def cluster_composition(adata: anndata.AnnData, key: str, groupby: str = "hto_classification") -> pd.DataFrame:
    """Number of cells per cluster (rows) and sample label (columns)"""
    table = pd.crosstab(adata.obs[key], adata.obs[groupby])
    return table.loc[natsorted(table.index), natsorted(table.columns)]


def main(reduced_h5ad: Path, config: Path, id: str, out_dir: Path):
    options = load_options(config)
    adata = cluster_cells(anndata.read_h5ad(reduced_h5ad), options.cluster, options.reduction.n_pcs, options.seed)
    out_dir.mkdir(parents=True, exist_ok=True)
    adata.write_h5ad(out_dir / f"{id}.clustered.h5ad")
    for resolution in options.cluster.resolutions:
        key = cluster_key(resolution)
        cluster_composition(adata, key).to_csv(out_dir / f"{id}_{key}_composition.csv")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Cluster cells on the principal component neighbor graph")
    parser.add_argument("--reduced", type=Path, required=True, help="AnnData with PCA (.h5ad)")
    parser.add_argument("--config", type=Path, help="Analysis options JSON")
    parser.add_argument("--id", required=True, help="Sample name used as output prefix")
    parser.add_argument("--outDir", type=Path, default=Path("."), help="Directory for outputs")
    args = parser.parse_args()
    main(args.reduced, args.config, args.id, args.outDir)
