#!/usr/bin/env python
"""Create the hashtag demultiplexing summary table from annotated cells"""

import argparse
from pathlib import Path

import anndata
import pandas as pd
import polars as pl

from hto_demux import codes

METHOD_COLUMNS = {"HTODemux": "hto_classification", "MULTIseq": "multiseq_classification"}


def demux_summary(obs: pd.DataFrame) -> pl.DataFrame:
    """
    Number and fraction of cells per assignment, for each classification method present in @obs

    Args:
        obs: Cell annotations with hashtag assignment columns

    Returns:
        Table with columns method, assignment, is_singlet, cells, fraction
    """
    tables = []
    for method, col in METHOD_COLUMNS.items():
        if col not in obs.columns:
            continue
        labels = pl.DataFrame({"assignment": obs[col].astype(str).to_list()})
        tables.append(
            labels.group_by("assignment")
            .agg(pl.len().alias("cells"))
            .with_columns(
                pl.lit(method).alias("method"),
                (pl.col("cells") / pl.col("cells").sum()).alias("fraction"),
                (~pl.col("assignment").is_in(codes.errors)).alias("is_singlet"),
            )
            .sort(["cells", "assignment"], descending=[True, False])
        )
    if not tables:
        return pl.DataFrame(
            schema={"method": pl.Utf8, "assignment": pl.Utf8, "is_singlet": pl.Boolean, "cells": pl.UInt32, "fraction": pl.Float64}
        )
    return pl.concat(tables, how="vertical").select(["method", "assignment", "is_singlet", "cells", "fraction"])


def main(demux_h5ad: Path, id: str, out_dir: Path):
    adata = anndata.read_h5ad(demux_h5ad)
    out_dir.mkdir(parents=True, exist_ok=True)
    demux_summary(adata.obs).write_csv(out_dir / f"{id}.demux_stats.csv")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Summarize hashtag demultiplexing")
    parser.add_argument("--demux", type=Path, required=True, help="Demultiplexed AnnData (.h5ad)")
    parser.add_argument("--id", required=True, help="Sample name used as output prefix")
    parser.add_argument("--outDir", type=Path, default=Path("."), help="Directory for outputs")
    args = parser.parse_args()
    main(args.demux, args.id, args.outDir)
