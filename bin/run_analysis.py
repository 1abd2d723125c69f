#!/usr/bin/env python
"""
Run the complete analysis from the RNA and hashtag matrices to cluster markers,
reusing stage snapshots whose fingerprint matches the current inputs and options
"""

import argparse
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import anndata
import pandas as pd

from cart_utils.base_logger import logger
from cart_utils.cache import cached_stage, file_digest, fingerprint, stage_fingerprint
from cart_utils.io import load_10x_matrix, load_hto_matrix, resolve_matrix_files
from cart_utils.options import AnalysisOptions, load_options
from cart_utils.validation import ensure_not_empty
from cluster_cells import cluster_cells, cluster_composition, cluster_key
from demux_stats import demux_summary
from differential_expression import de_cache, find_all_markers, lsc_marker_comparison
from filter_cells import flag_cells
from hto_demux import demultiplex
from normalize_features import normalize_and_select
from reduce_dims import explained_variance, reduce_dims


@dataclass(frozen=True)
class AnalysisResult:
    """
    Attributes:
        flagged: All demultiplexed cells with QC metrics, pass and flags
        clustered: Passing cells, normalized, embedded and clustered
        markers: One-vs-rest markers of the marker resolution clusters
        lsc_markers: Stem cell markers between timepoints
    """

    flagged: anndata.AnnData
    clustered: anndata.AnnData
    markers: pd.DataFrame
    lsc_markers: pd.DataFrame


def matrix_fingerprint(matrix_dir: Path) -> str:
    """Fingerprint of the files of a matrix directory"""
    files = resolve_matrix_files(matrix_dir)
    return fingerprint({name: file_digest(path) for name, path in sorted(files.items())})


def run_pipeline(
    rna_dir: Path,
    hto_dir: Path,
    options: AnalysisOptions = AnalysisOptions(),
    cache_dir: Optional[Path] = None,
    cd19_status: Optional[str] = None,
) -> AnalysisResult:
    """
    Load, demultiplex, filter, normalize, embed and cluster the cells, then compute markers

    Args:
        rna_dir: 10x matrix directory of RNA counts
        hto_dir: 10x matrix directory of hashtag counts
        options: Analysis options
        cache_dir: Directory for stage snapshots and result tables; None disables caching
        cd19_status: Restrict the timepoint comparison to cells of this CD19 status
    """
    cache_dir = Path(cache_dir) if cache_dir is not None else None
    params = options.as_params()
    seed = options.seed

    # thread count does not change the loaded matrices
    load_params = {k: v for k, v in params["load"].items() if k != "threads"}
    rna_key = stage_fingerprint(matrix_fingerprint(rna_dir), "load_rna", load_params)
    hto_key = stage_fingerprint(matrix_fingerprint(hto_dir), "load_hto", {"drop": params["demux"]["drop_features"]})

    def load_rna():
        return load_10x_matrix(
            rna_dir,
            min_cells=options.load.min_cells,
            min_features=options.load.min_features,
            threads=options.load.threads,
        )

    def load_hto():
        return load_hto_matrix(hto_dir, drop_features=options.demux.drop_features, threads=options.load.threads)

    demux_key = stage_fingerprint(rna_key + hto_key, "demux", {"demux": params["demux"], "seed": seed})
    demuxed = cached_stage(
        cache_dir,
        "demux",
        demux_key,
        lambda: demultiplex(
            cached_stage(cache_dir, "rna", rna_key, load_rna),
            cached_stage(cache_dir, "hto", hto_key, load_hto),
            options.demux,
            seed=seed,
        ),
    )

    qc_key = stage_fingerprint(demux_key, "qc", params["qc"])
    flagged = cached_stage(cache_dir, "qc", qc_key, lambda: flag_cells(demuxed, options.qc)[0])
    ensure_not_empty(int(flagged.obs["pass"].sum()), "Quality filtering")
    filtered = flagged[flagged.obs["pass"].to_numpy()].copy()

    norm_key = stage_fingerprint(qc_key, "normalize", params["normalize"])
    normalized = cached_stage(cache_dir, "normalized", norm_key, lambda: normalize_and_select(filtered, options.normalize))

    reduce_key = stage_fingerprint(norm_key, "reduce", {"reduction": params["reduction"], "seed": seed})
    reduced = cached_stage(cache_dir, "reduced", reduce_key, lambda: reduce_dims(normalized, options.reduction, seed))

    clustered_key = stage_fingerprint(
        reduce_key, "cluster", {"cluster": params["cluster"], "n_pcs": options.reduction.n_pcs, "seed": seed}
    )
    clustered = cached_stage(
        cache_dir,
        "clustered",
        clustered_key,
        lambda: cluster_cells(reduced, options.cluster, options.reduction.n_pcs, seed),
    )

    cache = de_cache(cache_dir / "de" if cache_dir is not None else None)
    markers = find_all_markers(clustered, cluster_key(options.cluster.markers_resolution), options.de, cache)
    lsc = lsc_marker_comparison(clustered, options.de, cd19_status, cache)
    logger.info(f"{clustered.n_obs} cells analyzed; {len(markers)} marker rows")
    return AnalysisResult(flagged=flagged, clustered=clustered, markers=markers, lsc_markers=lsc)


def write_outputs(result: AnalysisResult, options: AnalysisOptions, id: str, out_dir: Path):
    """Write the result tables of a run"""
    out_dir.mkdir(parents=True, exist_ok=True)
    result.flagged.obs.to_csv(out_dir / f"{id}_allCells.csv", index_label="cell_id")
    demux_summary(result.flagged.obs).write_csv(out_dir / f"{id}.demux_stats.csv")
    explained_variance(result.clustered).to_csv(out_dir / f"{id}_pca_variance.csv", index=False)
    for resolution in options.cluster.resolutions:
        key = cluster_key(resolution)
        cluster_composition(result.clustered, key).to_csv(out_dir / f"{id}_{key}_composition.csv")
    marker_key = cluster_key(options.cluster.markers_resolution)
    result.markers.to_csv(out_dir / f"{id}_{marker_key}_markers.tsv", sep="\t", index=False)
    result.lsc_markers.to_csv(out_dir / f"{id}_lsc_markers.tsv", sep="\t", index=False)
    umap = pd.DataFrame(result.clustered.obsm["X_umap"], index=result.clustered.obs_names, columns=["UMAP_1", "UMAP_2"])
    umap.join(result.clustered.obs[[marker_key, "hto_classification"]]).to_csv(
        out_dir / f"{id}_umap.csv", index_label="cell_id"
    )


def main(rna_dir: Path, hto_dir: Path, config: Path, id: str, out_dir: Path, cache_dir: Optional[Path], cd19_status):
    options = load_options(config)
    if cache_dir is None:
        cache_dir = out_dir / "cache"
    result = run_pipeline(rna_dir, hto_dir, options, cache_dir, cd19_status)
    write_outputs(result, options, id, out_dir)
    with open(out_dir / f"{id}_options.json", "w") as f:
        json.dump(options.as_params(), f, indent=2)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run the complete single-cell analysis")
    parser.add_argument("--rna_matrix", type=Path, required=True, help="10x matrix directory of RNA counts")
    parser.add_argument("--hto_matrix", type=Path, required=True, help="10x matrix directory of hashtag counts")
    parser.add_argument("--config", type=Path, help="Analysis options JSON")
    parser.add_argument("--id", required=True, help="Sample name used as output prefix")
    parser.add_argument("--outDir", type=Path, default=Path("."), help="Directory for outputs")
    parser.add_argument("--cacheDir", type=Path, help="Directory for stage snapshots (default: <outDir>/cache)")
    parser.add_argument("--cd19Status", help="Only compare cells of this CD19 status between timepoints")
    args = parser.parse_args()
    main(args.rna_matrix, args.hto_matrix, args.config, args.id, args.outDir, args.cacheDir, args.cd19Status)
