import anndata
import numpy as np
import pandas as pd
import pytest
import scipy.sparse as sp

from cart_utils.options import ClusterOptions, NormalizeOptions, ReductionOptions
from cart_utils.validation import ParameterError
from cluster_cells import build_neighbor_graph, cluster_cells, cluster_composition, cluster_key
from conftest import simulate_counts
from normalize_features import normalize_and_select
from reduce_dims import explained_variance, run_pca, run_umap

REDUCTION = ReductionOptions(n_comps=10, n_pcs=5, n_neighbors=10)


@pytest.fixture(scope="module")
def normalized():
    rna, _, barcodes, genes, truth = simulate_counts(seed=11)
    adata = anndata.AnnData(
        X=sp.csr_matrix(rna.astype(np.float32)),
        obs=pd.DataFrame({"hto_classification": truth.to_numpy()}, index=barcodes),
        var=pd.DataFrame(index=genes),
    )
    return normalize_and_select(adata, NormalizeOptions(n_top_genes=60, flavor="seurat"))


@pytest.fixture(scope="module")
def reduced(normalized):
    return run_pca(normalized, REDUCTION)


def test_pca_shapes(normalized, reduced):
    assert reduced.obsm["X_pca"].shape == (normalized.n_obs, 10)
    assert reduced.varm["PCs"].shape == (normalized.n_vars, 10)
    hvg = normalized.var["highly_variable"].to_numpy()
    assert (reduced.varm["PCs"][~hvg] == 0).all()
    assert "X_pca" not in normalized.obsm
    # X keeps the log-normalized values
    np.testing.assert_allclose(reduced.X.toarray(), normalized.X.toarray())


def test_explained_variance(reduced):
    variance = explained_variance(reduced)
    assert list(variance["component"]) == list(range(1, 11))
    assert (np.diff(variance["variance_ratio"]) <= 1e-9).all()
    assert variance["cumulative_ratio"].iloc[-1] <= 1.0 + 1e-9


def test_n_comps_capped(normalized):
    small = normalized[:8].copy()
    pca = run_pca(small, ReductionOptions(n_comps=20, n_pcs=5))
    assert pca.obsm["X_pca"].shape[1] == 7


def test_umap(reduced):
    embedded = run_umap(reduced, REDUCTION)
    assert embedded.obsm["X_umap"].shape == (reduced.n_obs, 2)
    assert np.isfinite(embedded.obsm["X_umap"]).all()
    assert "umap_neighbors" in embedded.uns
    assert "X_umap" not in reduced.obsm


def test_umap_reproducible(reduced):
    first = run_umap(reduced, REDUCTION)
    second = run_umap(reduced, REDUCTION)
    np.testing.assert_allclose(first.obsm["X_umap"], second.obsm["X_umap"])


def test_neighbor_graph_requires_pca(normalized):
    with pytest.raises(ParameterError):
        build_neighbor_graph(normalized.copy(), n_pcs=5, n_neighbors=10)


def test_neighbor_graph_reused(reduced):
    adata = reduced.copy()
    build_neighbor_graph(adata, n_pcs=5, n_neighbors=10)
    graph = adata.obsp["connectivities"]
    build_neighbor_graph(adata, n_pcs=5, n_neighbors=10)
    assert adata.obsp["connectivities"] is graph
    build_neighbor_graph(adata, n_pcs=5, n_neighbors=12)
    assert adata.uns["neighbors"]["params"]["n_neighbors"] == 12


def test_cluster_labels(reduced):
    clustered = cluster_cells(reduced, ClusterOptions(resolutions=(0.5,), n_neighbors=10), n_pcs=5)
    labels = clustered.obs[cluster_key(0.5)]
    assert isinstance(labels.dtype, pd.CategoricalDtype)
    assert labels.notna().all()
    assert clustered.obs[cluster_key(0.5)].nunique() >= 2
    assert cluster_key(0.5) not in reduced.obs


def test_clustering_deterministic(reduced):
    options = ClusterOptions(resolutions=(0.8,), n_neighbors=10, markers_resolution=0.8)
    first = cluster_cells(reduced, options, n_pcs=5, seed=3)
    second = cluster_cells(reduced, options, n_pcs=5, seed=3)
    assert list(first.obs[cluster_key(0.8)]) == list(second.obs[cluster_key(0.8)])


def test_higher_resolution_more_clusters(reduced):
    options = ClusterOptions(resolutions=(0.1, 2.0), n_neighbors=10, markers_resolution=0.1)
    clustered = cluster_cells(reduced, options, n_pcs=5)
    assert clustered.obs[cluster_key(2.0)].nunique() >= clustered.obs[cluster_key(0.1)].nunique()


def test_new_resolution_keeps_existing_column(reduced):
    first = cluster_cells(reduced, ClusterOptions(resolutions=(0.5,), n_neighbors=10), n_pcs=5)
    second = cluster_cells(first, ClusterOptions(resolutions=(1.0,), n_neighbors=10, markers_resolution=1.0), n_pcs=5)
    assert list(second.obs[cluster_key(0.5)]) == list(first.obs[cluster_key(0.5)])
    assert cluster_key(1.0) in second.obs


def test_invalid_resolution():
    with pytest.raises(ParameterError):
        ClusterOptions(resolutions=(0.0,), markers_resolution=0.0)
    with pytest.raises(ParameterError):
        ClusterOptions(resolutions=(0.5,), markers_resolution=1.0)


def test_cluster_composition(reduced):
    clustered = cluster_cells(reduced, ClusterOptions(resolutions=(0.5,), n_neighbors=10), n_pcs=5)
    table = cluster_composition(clustered, cluster_key(0.5))
    assert table.to_numpy().sum() == clustered.n_obs
    assert "T1-CD19neg" in table.columns
