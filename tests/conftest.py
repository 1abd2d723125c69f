import gzip
from pathlib import Path

import anndata
import numpy as np
import pandas as pd
import pytest
import scipy.sparse as sp

SAMPLES = ["T1-CD19neg", "T1-CD19pos", "T2-CD19neg", "T2-CD19pos"]
MARKERS = ["CD34", "CD38", "CD99", "CD44", "CD47"]


def write_matrix_dir(
    path: Path,
    counts: np.ndarray,
    barcodes: list,
    features: list,
    feature_type: str = "Gene Expression",
    gzipped: bool = True,
) -> Path:
    """Write a cells x features count array as a 10x matrix directory (features as mtx rows)"""
    path.mkdir(parents=True, exist_ok=True)
    opener = gzip.open if gzipped else open
    suffix = ".gz" if gzipped else ""
    genes, cells = np.nonzero(np.asarray(counts).T)
    with opener(path / f"matrix.mtx{suffix}", "wt") as f:
        f.write("%%MatrixMarket matrix coordinate integer general\n")
        f.write("%written by the test suite\n")
        f.write(f"{len(features)} {len(barcodes)} {len(genes)}\n")
        for g, c in zip(genes, cells):
            f.write(f"{g + 1} {c + 1} {int(counts[c, g])}\n")
    with opener(path / f"barcodes.tsv{suffix}", "wt") as f:
        f.writelines(f"{bc}\n" for bc in barcodes)
    with opener(path / f"features.tsv{suffix}", "wt") as f:
        f.writelines(f"ID_{name}\t{name}\t{feature_type}\n" for name in features)
    return path


def barcodes_for(n: int) -> list:
    return [f"CELL{i:04d}-1" for i in range(n)]


@pytest.fixture
def toy_dirs(tmp_path):
    """3 cells x 2 genes, each cell carrying a single clearly separated hashtag"""
    barcodes = barcodes_for(3)
    rna = np.array([[5, 1], [7, 0], [3, 1]])
    hto = np.array([[100, 0, 0], [0, 100, 0], [0, 0, 100]])
    rna_dir = write_matrix_dir(tmp_path / "rna", rna, barcodes, ["GENE1", "MT-CO1"])
    hto_dir = write_matrix_dir(tmp_path / "hto", hto, barcodes, SAMPLES[:3], "Antibody Capture")
    return rna_dir, hto_dir


def simulate_counts(seed: int = 0, cells_per_sample: int = 30, n_doublets: int = 6, n_genes: int = 120):
    """
    Two cell types with distinct expression programs spread over four hashtagged samples,
    plus hashtag doublets and a few cells without any hashtag

    Returns:
        RNA counts, hashtag counts, barcodes, gene names and the true sample of each cell
    """
    rng = np.random.default_rng(seed)
    truth = [s for s in SAMPLES for _ in range(cells_per_sample)] + ["Doublet"] * n_doublets + ["Negative"] * 3
    n_cells = len(truth)
    genes = MARKERS + ["MT-CO1", "MT-ND1"] + [f"GENE{i}" for i in range(n_genes - len(MARKERS) - 2)]

    cell_type = rng.integers(0, 2, n_cells)
    rates = np.full((n_cells, len(genes)), 0.5)
    program = len(MARKERS) + 2
    rates[cell_type == 0, program : program + 30] = 6.0
    rates[cell_type == 1, program + 30 : program + 60] = 6.0
    # stem cell markers rise at the second timepoint
    t2 = np.array([label.startswith("T2") for label in truth])
    rates[t2, : len(MARKERS)] = 4.0
    rates[:, len(MARKERS) : len(MARKERS) + 2] = 0.8
    rna = rng.poisson(rates)

    hto = rng.poisson(2.0, (n_cells, len(SAMPLES)))
    for i, label in enumerate(truth):
        if label in SAMPLES:
            hto[i, SAMPLES.index(label)] += rng.poisson(300)
        elif label == "Doublet":
            first, second = rng.choice(len(SAMPLES), 2, replace=False)
            hto[i, first] += rng.poisson(300)
            hto[i, second] += rng.poisson(300)
    return rna, hto, barcodes_for(n_cells), genes, pd.Series(truth, index=barcodes_for(n_cells))


@pytest.fixture(scope="session")
def synthetic_dirs(tmp_path_factory):
    rna, hto, barcodes, genes, truth = simulate_counts()
    root = tmp_path_factory.mktemp("synthetic")
    rna_dir = write_matrix_dir(root / "rna", rna, barcodes, genes)
    hto_dir = write_matrix_dir(root / "hto", hto, barcodes, SAMPLES, "Antibody Capture")
    return rna_dir, hto_dir, truth


# options small enough for the simulated data
SMALL_CONFIG = {
    "load": {"min_cells": 1, "min_features": 10},
    "demux": {"kmeans_starts": 10},
    "qc": {"max_mito_fraction": 0.5},
    "normalize": {"n_top_genes": 60, "flavor": "seurat"},
    "reduction": {"n_comps": 10, "n_pcs": 5, "n_neighbors": 10},
    "cluster": {"resolutions": [0.5, 1.0], "n_neighbors": 10, "markers_resolution": 0.5},
}


@pytest.fixture
def expression_adata():
    """Log-normalized toy data: GENE_UP is higher in group A, the other genes are identical"""
    rng = np.random.default_rng(1)
    n = 20
    counts = rng.poisson(3.0, (2 * n, 4)).astype(np.float32)
    counts[n:, 1:] = counts[:n, 1:]
    counts[:n, 0] += 20
    adata = anndata.AnnData(
        X=sp.csr_matrix(np.log1p(counts)),
        obs=pd.DataFrame({"group": ["A"] * n + ["B"] * n}, index=barcodes_for(2 * n)),
        var=pd.DataFrame(index=["GENE_UP", "GENE_B", "GENE_C", "GENE_D"]),
    )
    return adata
