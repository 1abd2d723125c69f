#!/usr/bin/env python
"""
Assign cells to their sample of origin from hashtag oligo (HTO) counts.

The primary classification follows HTODemux: hashtag counts are CLR normalized,
cells are clustered with k-means, and for every tag a negative binomial is fitted
to the raw counts of its lowest cluster. A cell is positive for a tag above the
positive quantile of that fit. One positive tag makes a singlet, two or more a
doublet, none a negative. The MULTI-seq classification is computed alongside for
comparison only.
"""

import argparse
import re
from dataclasses import dataclass
from pathlib import Path

import anndata
import numpy as np
import pandas as pd
import polars as pl
import scipy.sparse as sp
from natsort import natsorted
from sklearn.cluster import KMeans

from cart_utils.base_logger import logger
from cart_utils.options import DemuxOptions, load_options
from cart_utils.stats import clr_normalize, fit_background, kde_modes, mode_threshold
from cart_utils.validation import ParameterError, ensure_not_empty


@dataclass(frozen=True)
class AssignmentCodes:
    """Hashtag assignment strings that are not sample names"""

    doublet: str = "Doublet"
    negative: str = "Negative"
    singlet: str = "Singlet"

    @property
    def errors(self) -> list:
        return [self.doublet, self.negative]


codes = AssignmentCodes()

# Sample names are <timepoint>-<CD19 fraction>, e.g. T1-CD19neg
SAMPLE_LABEL = re.compile(r"^(?P<timepoint>T\d+)-(?P<cd19_status>.+)$")


def intersect_barcodes(rna: anndata.AnnData, hto: anndata.AnnData) -> tuple[anndata.AnnData, anndata.AnnData]:
    """
    Restrict RNA and hashtag data to the barcodes present in both, in RNA order

    Args:
        rna: cells x genes counts
        hto: cells x tags counts

    Returns:
        Copies of @rna and @hto with identical obs_names
    """
    indices = (
        pl.DataFrame({"cell_id": rna.obs_names.to_list()})
        .with_row_index("rna_index")
        .join(
            pl.DataFrame({"cell_id": hto.obs_names.to_list()}).with_row_index("hto_index"),
            on="cell_id",
            how="inner",
        )
        .sort("rna_index")
    )
    ensure_not_empty(indices.height, "Intersecting RNA and hashtag barcodes")
    logger.debug(f"{indices.height} of {rna.n_obs} RNA barcodes have hashtag counts")
    rna_idx = indices["rna_index"].to_numpy().astype(np.int64)
    hto_idx = indices["hto_index"].to_numpy().astype(np.int64)
    return rna[rna_idx].copy(), hto[hto_idx].copy()


def tag_counts(hto: anndata.AnnData) -> np.ndarray:
    """Dense tags x cells array of raw hashtag counts"""
    X = hto.X.toarray() if sp.issparse(hto.X) else np.asarray(hto.X)
    return X.T.astype(float)


def sample_names_for(tags: list, options: DemuxOptions) -> list:
    """Sample name for each tag; tags without a mapping keep their own name"""
    names = [options.sample_names.get(tag, tag) for tag in tags]
    if len(set(names)) != len(names):
        raise ParameterError(f"Sample names must be unique: {names}")
    clashes = set(names) & set(codes.errors)
    if clashes:
        raise ParameterError(f"Sample names clash with assignment codes: {sorted(clashes)}")
    return names


def call_positive_tags(positive: np.ndarray, names: list) -> np.ndarray:
    """
    Label cells from a tags x cells boolean matrix of positive calls:
    exactly one positive tag gives that sample's name, more than one 'Doublet', none 'Negative'
    """
    n_positive = positive.sum(axis=0)
    singlet_names = np.asarray(names, dtype=object)[positive.argmax(axis=0)]
    return np.where(n_positive == 0, codes.negative, np.where(n_positive > 1, codes.doublet, singlet_names))


def hto_demux(hto: anndata.AnnData, options: DemuxOptions, seed: int = 0) -> pd.DataFrame:
    """
    Classify cells by hashtag enrichment over a negative binomial background

    Args:
        hto: cells x tags raw counts
        options: Demultiplexing options
        seed: Random seed for k-means

    Returns:
        DataFrame indexed like hto.obs_names with hto_maxID, hto_secondID, hto_margin,
        hto_classification and hto_classification_global
    """
    ensure_not_empty(hto.n_obs, "Hashtag demultiplexing")
    tags = list(hto.var_names)
    names = sample_names_for(tags, options)
    counts = tag_counts(hto)
    norm = clr_normalize(counts)

    n_distinct = np.unique(norm.T, axis=0).shape[0]
    n_clusters = min(len(tags) + 1, n_distinct)
    clusters = KMeans(n_clusters=n_clusters, n_init=options.kmeans_starts, random_state=seed).fit(norm.T).labels_

    positive = np.zeros(counts.shape, dtype=bool)
    for i, tag in enumerate(tags):
        # background is the cluster with the lowest average expression of this tag
        cluster_means = pd.Series(np.expm1(norm[i])).groupby(clusters).mean()
        background = cluster_means.idxmin()
        fit = fit_background(counts[i, clusters == background], options.positive_quantile)
        positive[i] = counts[i] > fit.cutoff
        logger.debug(
            f"{tag}: background cluster {background} (mu={fit.mu:.2f}, size={fit.size:.2f}), "
            f"cutoff {fit.cutoff}, {positive[i].sum()} positive cells"
        )

    classification = call_positive_tags(positive, names)
    order = np.argsort(-norm, axis=0, kind="stable")
    second = order[1] if len(tags) > 1 else order[0]
    max_values = np.take_along_axis(norm, order[[0]], axis=0)[0]
    second_values = norm[second, np.arange(norm.shape[1])]
    global_class = np.where(np.isin(classification, codes.errors), classification, codes.singlet)

    result = pd.DataFrame(
        {
            "hto_maxID": np.asarray(names, dtype=object)[order[0]],
            "hto_secondID": np.asarray(names, dtype=object)[second],
            "hto_margin": max_values - second_values,
            "hto_classification": classification,
            "hto_classification_global": global_class,
        },
        index=hto.obs_names,
    )
    for col in ["hto_maxID", "hto_secondID", "hto_classification", "hto_classification_global"]:
        result[col] = pd.Categorical(result[col], categories=natsorted(result[col].unique()))
    return result


def classify_cells(norm: np.ndarray, names: list, q: float, modes: list) -> np.ndarray:
    """
    MULTI-seq classification at one quantile

    Args:
        norm: cells x tags normalized counts
        names: Sample name for each tag
        q: Quantile between the negative and positive modes used as threshold
        modes: (low, high) density modes per tag, None for tags without a threshold

    Returns:
        Label per cell
    """
    positive = np.zeros(norm.T.shape, dtype=bool)
    for i, tag_modes in enumerate(modes):
        if tag_modes is None:
            continue
        positive[i] = norm[:, i] >= mode_threshold(tag_modes, q)
    return call_positive_tags(positive, names)


def multiseq_demux(hto: anndata.AnnData, options: DemuxOptions) -> pd.Series:
    """
    MULTI-seq classification with an automatic quantile sweep.

    Each round picks the quantile from @options.quantile_range that maximizes the
    fraction of singlets, removes the cells called Negative and repeats, for at
    most @options.max_iterations rounds.

    Args:
        hto: cells x tags raw counts
        options: Demultiplexing options

    Returns:
        Label per cell, indexed like hto.obs_names
    """
    tags = list(hto.var_names)
    names = sample_names_for(tags, options)
    norm = clr_normalize(tag_counts(hto)).T
    calls = pd.Series(codes.negative, index=hto.obs_names, dtype=object)
    remaining = np.arange(hto.n_obs)
    for iteration in range(1, options.max_iterations + 1):
        data = norm[remaining]
        modes = [kde_modes(data[:, i]) for i in range(len(tags))]
        for tag, tag_modes in zip(tags, modes):
            if tag_modes is None:
                logger.warning(f"No MULTI-seq threshold found for {tag} in iteration {iteration}")
        sweep = {q: classify_cells(data, names, q, modes) for q in options.quantile_range}
        singlet_fraction = {q: np.mean(~np.isin(labels, codes.errors)) for q, labels in sweep.items()}
        q_use = max(options.quantile_range, key=lambda q: singlet_fraction[q])
        round_calls = sweep[q_use]
        calls.iloc[remaining] = round_calls
        negative = round_calls == codes.negative
        logger.debug(f"MULTI-seq iteration {iteration}: q={q_use}, {negative.sum()} negative cells removed")
        remaining = remaining[~negative]
        if not negative.any() or len(remaining) == 0:
            break
    return calls


def sample_label_parts(labels: pd.Series) -> pd.DataFrame:
    """
    Split sample labels such as T1-CD19neg into timepoint and cd19_status;
    Doublet, Negative and labels without that form give missing values
    """
    parts = labels.astype(str).str.extract(SAMPLE_LABEL.pattern)
    for col in parts.columns:
        parts[col] = pd.Categorical(parts[col], categories=natsorted(parts[col].dropna().unique()))
    return parts


def demultiplex(
    rna: anndata.AnnData, hto: anndata.AnnData, options: DemuxOptions, seed: int = 0
) -> anndata.AnnData:
    """
    Annotate RNA cells with their hashtag assignment

    Args:
        rna: cells x genes counts
        hto: cells x tags counts
        options: Demultiplexing options
        seed: Random seed for k-means

    Returns:
        New AnnData restricted to barcodes with hashtag counts, with assignment columns in obs
        and the raw hashtag counts in obsm['hto_counts']
    """
    rna, hto = intersect_barcodes(rna, hto)
    assignments = hto_demux(hto, options, seed=seed)
    for col in assignments.columns:
        rna.obs[col] = assignments[col].to_numpy()
    multiseq = multiseq_demux(hto, options)
    rna.obs["multiseq_classification"] = pd.Categorical(multiseq.to_numpy(), categories=natsorted(multiseq.unique()))
    parts = sample_label_parts(rna.obs["hto_classification"])
    rna.obs["timepoint"] = parts["timepoint"].to_numpy()
    rna.obs["cd19_status"] = parts["cd19_status"].to_numpy()
    rna.obsm["hto_counts"] = pd.DataFrame(tag_counts(hto).T, index=rna.obs_names, columns=list(hto.var_names))

    summary = rna.obs["hto_classification_global"].value_counts()
    logger.info(f"Hashtag assignment: {summary.to_dict()}")
    return rna


def main(rna_path: Path, hto_path: Path, config: Path, id: str, out_dir: Path):
    options = load_options(config)
    rna = anndata.read_h5ad(rna_path)
    hto = anndata.read_h5ad(hto_path)
    adata = demultiplex(rna, hto, options.demux, seed=options.seed)
    out_dir.mkdir(parents=True, exist_ok=True)
    adata.write_h5ad(out_dir / f"{id}.demux.h5ad")
    assignment_cols = [
        "hto_maxID",
        "hto_secondID",
        "hto_margin",
        "hto_classification",
        "hto_classification_global",
        "multiseq_classification",
        "timepoint",
        "cd19_status",
    ]
    adata.obs[assignment_cols].to_csv(out_dir / f"{id}_hto_assignments.csv", index_label="cell_id")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Demultiplex pooled samples from hashtag counts")
    parser.add_argument("--rna", type=Path, required=True, help="RNA counts AnnData (.h5ad)")
    parser.add_argument("--hto", type=Path, required=True, help="Hashtag counts AnnData (.h5ad)")
    parser.add_argument("--config", type=Path, help="Analysis options JSON")
    parser.add_argument("--id", required=True, help="Sample name used as output prefix")
    parser.add_argument("--outDir", type=Path, default=Path("."), help="Directory for outputs")
    args = parser.parse_args()
    main(args.rna, args.hto, args.config, args.id, args.outDir)
