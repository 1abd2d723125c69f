#!/usr/bin/env python
"""
Differential expression between groups of cells: cluster markers (one-vs-rest)
and pairwise comparisons of sample labels, with results cached by fingerprint
"""

import argparse
import dataclasses
from pathlib import Path
from typing import Optional, Sequence

import anndata
import numpy as np
import pandas as pd
import scipy.sparse as sp
from natsort import natsorted
from scipy.stats import mannwhitneyu

from cart_utils.base_logger import logger
from cart_utils.cache import TableCache, dataset_fingerprint, fingerprint
from cart_utils.options import DEOptions, load_options
from cart_utils.stats import adjust_pvalues
from cart_utils.validation import EmptyResultError, ParameterError
from cluster_cells import cluster_key

RESULT_COLUMNS = ["gene", "mean_1", "mean_2", "pct_1", "pct_2", "avg_log2FC", "p_val", "p_val_adj"]
# genes densified at once
CHUNK_SIZE = 1000


def de_cache(cache_dir: Optional[Path] = None) -> TableCache:
    """Cache of differential expression tables"""
    return TableCache(cache_dir, prefix="de", str_columns=("gene", "cluster"))


def result_params(options: DEOptions) -> dict:
    """Options that change the result of a comparison"""
    return {
        "min_pct": options.min_pct,
        "logfc_threshold": options.logfc_threshold,
        "only_pos": options.only_pos,
        "correction": options.correction,
    }


def _positions(index: pd.Index, names: Sequence[str], what: str) -> np.ndarray:
    positions = index.get_indexer(list(names))
    missing = [n for n, p in zip(names, positions) if p < 0]
    if missing:
        raise ParameterError(f"{len(missing)} {what} not found, e.g. {missing[0]}")
    return positions


def _dense(X) -> np.ndarray:
    return X.toarray() if sp.issparse(X) else np.asarray(X)


def _group_summaries(X, idx_1: np.ndarray, idx_2: np.ndarray, gene_idx: np.ndarray):
    """Per-gene means, fraction expressing and the pseudocount fold-change of two groups"""
    mean_1, mean_2, pct_1, pct_2, logfc = [], [], [], [], []
    for start in range(0, len(gene_idx), CHUNK_SIZE):
        block = X[:, gene_idx[start : start + CHUNK_SIZE]]
        x1 = _dense(block[idx_1])
        x2 = _dense(block[idx_2])
        mean_1.append(x1.mean(axis=0))
        mean_2.append(x2.mean(axis=0))
        pct_1.append((x1 > 0).mean(axis=0))
        pct_2.append((x2 > 0).mean(axis=0))
        # fold-change of the means on the count scale
        logfc.append(np.log2(np.expm1(x1).mean(axis=0) + 1) - np.log2(np.expm1(x2).mean(axis=0) + 1))
    return tuple(np.concatenate(v) if v else np.zeros(0) for v in (mean_1, mean_2, pct_1, pct_2, logfc))


def _rank_sum_pvalues(X, idx_1: np.ndarray, idx_2: np.ndarray, gene_idx: np.ndarray) -> np.ndarray:
    """Two-sided Wilcoxon rank-sum p-values (normal approximation with continuity correction)"""
    pvalues = []
    for start in range(0, len(gene_idx), CHUNK_SIZE):
        block = X[:, gene_idx[start : start + CHUNK_SIZE]]
        x1 = _dense(block[idx_1])
        x2 = _dense(block[idx_2])
        # constant genes have zero rank variance
        with np.errstate(divide="ignore", invalid="ignore"):
            res = mannwhitneyu(x1, x2, axis=0, method="asymptotic", use_continuity=True, alternative="two-sided")
        pvalues.append(np.clip(np.nan_to_num(np.atleast_1d(res.pvalue), nan=1.0), 0, 1))
    return np.concatenate(pvalues) if pvalues else np.zeros(0)


def _compare(
    adata: anndata.AnnData, cells_1: Sequence[str], cells_2: Sequence[str], genes: Sequence[str], options: DEOptions
) -> pd.DataFrame:
    idx_1 = _positions(adata.obs_names, cells_1, "cells")
    idx_2 = _positions(adata.obs_names, cells_2, "cells")
    gene_idx = _positions(adata.var_names, genes, "genes")
    X = adata.X.tocsc() if sp.issparse(adata.X) else adata.X
    mean_1, mean_2, pct_1, pct_2, logfc = _group_summaries(X, idx_1, idx_2, gene_idx)

    tested = (np.maximum(pct_1, pct_2) >= options.min_pct) & (np.abs(logfc) >= options.logfc_threshold)
    if options.only_pos:
        tested &= logfc > 0
    logger.debug(f"Testing {tested.sum()} of {len(gene_idx)} genes ({len(idx_1)} vs {len(idx_2)} cells)")

    pvalues = _rank_sum_pvalues(X, idx_1, idx_2, gene_idx[tested])
    result = pd.DataFrame(
        {
            "gene": np.asarray(genes, dtype=object)[tested],
            "mean_1": mean_1[tested],
            "mean_2": mean_2[tested],
            "pct_1": pct_1[tested],
            "pct_2": pct_2[tested],
            "avg_log2FC": logfc[tested],
            "p_val": pvalues,
            "p_val_adj": adjust_pvalues(pvalues, options.correction),
        },
        columns=RESULT_COLUMNS,
    )
    return result.sort_values(["p_val", "avg_log2FC"], ascending=[True, False], kind="stable").reset_index(drop=True)


def compare_groups(
    adata: anndata.AnnData,
    cells_1: Sequence[str],
    cells_2: Sequence[str],
    genes: Optional[Sequence[str]] = None,
    options: DEOptions = DEOptions(),
    cache: Optional[TableCache] = None,
) -> pd.DataFrame:
    """
    Test every gene for differential expression between two disjoint (or identical) groups of cells.
    Expression values are taken from X (log-normalized). Genes failing the min_pct or
    logfc_threshold gates (or with a negative fold-change when only_pos) are not tested
    and not reported.

    Args:
        adata: Normalized cells
        cells_1: Barcodes of the first group
        cells_2: Barcodes of the second group
        genes: Genes to consider, all genes if None
        options: Test thresholds and multiple testing correction
        cache: Reuse results of identical comparisons

    Returns:
        One row per tested gene with columns gene, mean_1, mean_2, pct_1, pct_2, avg_log2FC, p_val, p_val_adj
    """
    cells_1, cells_2 = list(cells_1), list(cells_2)
    if not cells_1 or not cells_2:
        raise EmptyResultError(f"Cannot compare an empty group ({len(cells_1)} vs {len(cells_2)} cells)")
    # a group compared with itself is allowed and reports no difference
    if set(cells_1) != set(cells_2) and set(cells_1) & set(cells_2):
        raise ParameterError("Groups compared for differential expression must not share cells")
    genes = list(adata.var_names) if genes is None else list(genes)
    if not genes:
        raise ParameterError("No genes given for differential expression")

    def compute():
        return _compare(adata, cells_1, cells_2, genes, options)

    if cache is None:
        return compute()
    params = result_params(options)
    key = fingerprint(dataset_fingerprint(adata), sorted(cells_1), sorted(cells_2), genes, params)
    return cache.get_or_compute(key, compute, params)


def find_all_markers(
    adata: anndata.AnnData,
    groupby: str,
    options: DEOptions = DEOptions(),
    cache: Optional[TableCache] = None,
) -> pd.DataFrame:
    """
    Markers of every label in @groupby, each label tested against all other cells.
    Labels covering all cells (nothing to compare against) are skipped.

    Returns:
        Combined table with a 'cluster' column, ranked by p_val_adj then avg_log2FC
    """
    labels = adata.obs[groupby].astype(str)
    tables = []
    for label in natsorted(labels.unique()):
        inside = labels == label
        if inside.all():
            logger.warning(f"'{groupby}' has the single label {label}, no markers to compute")
            continue
        table = compare_groups(
            adata, labels.index[inside.to_numpy()], labels.index[~inside.to_numpy()], options=options, cache=cache
        )
        table.insert(0, "cluster", label)
        tables.append(table)
    if not tables:
        return pd.DataFrame(columns=["cluster"] + RESULT_COLUMNS)
    markers = pd.concat(tables, ignore_index=True)
    return markers.sort_values(["p_val_adj", "avg_log2FC"], ascending=[True, False], kind="stable").reset_index(
        drop=True
    )


def compare_labels(
    adata: anndata.AnnData,
    groupby: str,
    ident_1: str,
    ident_2: str,
    genes: Optional[Sequence[str]] = None,
    options: DEOptions = DEOptions(),
    cache: Optional[TableCache] = None,
) -> pd.DataFrame:
    """Compare cells labelled @ident_1 against cells labelled @ident_2 in obs[@groupby]"""
    labels = adata.obs[groupby].astype(str)
    cells_1 = labels.index[(labels == ident_1).to_numpy()]
    cells_2 = labels.index[(labels == ident_2).to_numpy()]
    return compare_groups(adata, cells_1, cells_2, genes, options, cache)


def lsc_marker_comparison(
    adata: anndata.AnnData,
    options: DEOptions = DEOptions(),
    cd19_status: Optional[str] = None,
    cache: Optional[TableCache] = None,
) -> pd.DataFrame:
    """
    Leukemic stem cell markers between the two configured timepoints.
    Every marker present in the data is reported, without expression or fold-change gates.

    Args:
        adata: Normalized singlets annotated with timepoint (and cd19_status)
        options: DE options holding the marker panel and timepoints
        cd19_status: Restrict both groups to cells of this CD19 status
        cache: Reuse results of identical comparisons
    """
    present = [g for g in options.lsc_markers if g in adata.var_names]
    absent = [g for g in options.lsc_markers if g not in adata.var_names]
    if absent:
        logger.warning(f"Markers not in the data: {', '.join(absent)}")
    if not present:
        raise ParameterError("None of the stem cell markers are present in the data")
    if cd19_status is not None:
        subset = adata.obs["cd19_status"].astype(str) == cd19_status
        adata = adata[subset.to_numpy()]
    ungated = dataclasses.replace(options, min_pct=0.0, logfc_threshold=0.0, only_pos=False)
    return compare_labels(adata, "timepoint", options.timepoint_1, options.timepoint_2, present, ungated, cache)


def main(clustered_h5ad: Path, config: Path, id: str, out_dir: Path, cd19_status: Optional[str], cache_dir: Optional[Path]):
    options = load_options(config)
    adata = anndata.read_h5ad(clustered_h5ad)
    cache = de_cache(cache_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    key = cluster_key(options.cluster.markers_resolution)
    markers = find_all_markers(adata, key, options.de, cache)
    markers.to_csv(out_dir / f"{id}_{key}_markers.tsv", sep="\t", index=False)
    lsc = lsc_marker_comparison(adata, options.de, cd19_status, cache)
    lsc.to_csv(out_dir / f"{id}_lsc_markers.tsv", sep="\t", index=False)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Cluster markers and timepoint comparison of stem cell markers")
    parser.add_argument("--clustered", type=Path, required=True, help="Clustered AnnData (.h5ad)")
    parser.add_argument("--config", type=Path, help="Analysis options JSON")
    parser.add_argument("--id", required=True, help="Sample name used as output prefix")
    parser.add_argument("--outDir", type=Path, default=Path("."), help="Directory for outputs")
    parser.add_argument("--cd19Status", help="Only compare cells of this CD19 status (e.g. CD19neg)")
    parser.add_argument("--cacheDir", type=Path, help="Directory for cached result tables")
    args = parser.parse_args()
    main(args.clustered, args.config, args.id, args.outDir, args.cd19Status, args.cacheDir)
