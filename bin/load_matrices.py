#!/usr/bin/env python
"""
Load RNA and hashtag count matrices from 10x style directories into AnnData files
"""

import argparse
from pathlib import Path

from cart_utils.base_logger import logger
from cart_utils.io import load_10x_matrix, load_hto_matrix
from cart_utils.options import load_options


def main(rna_dir: Path, hto_dir: Path, config: Path, out_dir: Path, id: str):
    options = load_options(config)
    rna = load_10x_matrix(
        rna_dir,
        min_cells=options.load.min_cells,
        min_features=options.load.min_features,
        threads=options.load.threads,
    )
    hto = load_hto_matrix(hto_dir, drop_features=options.demux.drop_features, threads=options.load.threads)
    out_dir.mkdir(parents=True, exist_ok=True)
    rna.write_h5ad(out_dir / f"{id}.rna.h5ad")
    hto.write_h5ad(out_dir / f"{id}.hto.h5ad")
    logger.info(f"RNA: {rna.n_obs} cells x {rna.n_vars} genes; HTO: {hto.n_obs} cells x {hto.n_vars} tags")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Load RNA and HTO count matrices")
    parser.add_argument("--rna_matrix", type=Path, required=True, help="10x matrix directory of RNA counts")
    parser.add_argument("--hto_matrix", type=Path, required=True, help="10x matrix directory of hashtag counts")
    parser.add_argument("--config", type=Path, help="Analysis options JSON")
    parser.add_argument("--id", required=True, help="Sample name used as output prefix")
    parser.add_argument("--outDir", type=Path, default=Path("."), help="Directory for outputs")
    args = parser.parse_args()
    main(args.rna_matrix, args.hto_matrix, args.config, args.outDir, args.id)
