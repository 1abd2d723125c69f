"""Utilities related to file I/O and parsing"""

import json
import gzip
import anndata
import duckdb
import numpy as np
import pandas as pd
import scipy.sparse as sp
from pathlib import Path
from typing import Dict, Optional

from cart_utils.base_logger import logger
from cart_utils.validation import LoadError, ParameterError

# Accepted file names inside a 10x style matrix directory, in order of preference
MATRIX_FILES = {
    "mtx": ("matrix.mtx.gz", "matrix.mtx"),
    "barcodes": ("barcodes.tsv.gz", "barcodes.tsv"),
    "features": ("features.tsv.gz", "features.tsv", "genes.tsv.gz", "genes.tsv"),
}


def readJSON(file: Path) -> dict:
    """
    Read an options file

    Raises:
        ParameterError if the file is missing or is not a JSON object
    """
    if not Path(file).exists():
        raise ParameterError(f"Options file '{file}' does not exist")
    with open(file) as f:
        try:
            parsed = json.load(f)
        except json.JSONDecodeError as err:
            raise ParameterError(f"{file} is not valid JSON: {err}") from err
    if not isinstance(parsed, dict):
        raise ParameterError(f"{file} must hold a JSON object")
    return parsed


def ensurePathsExist(filePaths: Dict[str, Path]):
    """
    Function to ensure all paths mentioned in the given @filePaths exist
    Raises LoadError if any file not found
    """
    for key, value in filePaths.items():
        if not value.exists():
            raise LoadError(f"{key} was assumed to be located at '{str(value)}'. It is missing")


def resolve_matrix_files(matrix_dir: Path) -> Dict[str, Path]:
    """
    Returns a dictionary of the paths to the three files of a 10x matrix directory.

    Args:
        matrix_dir: Directory with matrix.mtx, barcodes.tsv and features.tsv (gzipped or not)

    Returns:
        A dictionary with keys 'mtx', 'barcodes' and 'features'
    """
    matrix_dir = Path(matrix_dir)
    if not matrix_dir.is_dir():
        raise LoadError(f"Matrix directory '{matrix_dir}' does not exist")
    files = {}
    for key, names in MATRIX_FILES.items():
        candidates = [matrix_dir / name for name in names if (matrix_dir / name).exists()]
        # report the preferred name when nothing matches
        files[key] = candidates[0] if candidates else matrix_dir / names[0]
    ensurePathsExist(files)

    return files


def read_mtx_header(mtx_path: Path) -> tuple[int, int, int, int]:
    """
    Reads the header of a Matrix Market file

    Args:
        mtx_path: Path to the mtx file

    Returns:
        Number of rows, columns, non-zero entries and header lines to skip
    """
    opener = gzip.open if mtx_path.suffix == ".gz" else open
    skip_lines = 0
    dims = None
    with opener(mtx_path, "rt") as file:
        banner = file.readline()
        skip_lines += 1
        # https://math.nist.gov/MatrixMarket/formats.html
        if not banner.startswith("%%MatrixMarket matrix coordinate"):
            raise LoadError(f"{mtx_path} is not a coordinate Matrix Market file")
        if "general" not in banner:
            raise LoadError(f"{mtx_path}: only 'general' Matrix Market files are supported")
        for line in file:
            skip_lines += 1
            if not line.startswith("%"):
                dims = line.strip().split()
                break
    if dims is None or len(dims) != 3 or not all(d.isdigit() for d in dims):
        raise LoadError(f"{mtx_path} has a malformed dimension line: {dims}")
    nrows, ncols, nnz = map(int, dims)
    return nrows, ncols, nnz, skip_lines


def load_mtx_table(mtx_path: Path, con: duckdb.DuckDBPyConnection) -> tuple[int, int]:
    """
    Load a Matrix Market file into a duckdb table

    Args:
        mtx_path: Path to the mtx file
        con: duckdb connection

    Returns:
        Number of rows (genes) and columns (barcodes) of the matrix
    """
    nrows, ncols, nnz, skip_lines = read_mtx_header(mtx_path)
    con.sql(
        f"""
    CREATE OR REPLACE TABLE mtx_metadata (
        nrows UINTEGER,
        ncols UINTEGER
    );
    INSERT INTO mtx_metadata VALUES ({nrows}, {ncols});
    """
    )
    if nnz == 0:
        # header only, nothing for the csv reader to sniff
        con.sql("CREATE OR REPLACE TABLE mtx (gene UINTEGER, barcode UINTEGER, count FLOAT);")
        return nrows, ncols
    try:
        con.sql(
            f"""
        CREATE OR REPLACE TABLE mtx AS
        FROM read_csv(
            '{mtx_path}',
            delim=' ',
            header=false,
            skip={skip_lines},
            columns = {{
                'gene': 'UINTEGER',
                'barcode': 'UINTEGER',
                'count': 'FLOAT'
            }});
        """
        )
    except duckdb.Error as err:
        raise LoadError(f"Could not parse the body of {mtx_path}: {err}") from err
    n_entries, max_gene, max_barcode = con.sql("SELECT count(*), max(gene), max(barcode) FROM mtx;").fetchall()[0]
    if n_entries != nnz:
        raise LoadError(f"{mtx_path} declares {nnz} entries but contains {n_entries}")
    if n_entries and (max_gene > nrows or max_barcode > ncols):
        raise LoadError(f"{mtx_path} has entries outside of its declared {nrows} x {ncols} shape")
    return nrows, ncols


def count_detected_by(
    con: duckdb.DuckDBPyConnection, size: int, by: str = "gene", barcodes: Optional[np.ndarray] = None
) -> np.ndarray:
    """
    Count non-zero entries of a sparse matrix per gene or per barcode

    Args:
        con: duckdb connection with existing mtx table
        size: number of genes or barcodes in the matrix
        by: 'gene' (cells detecting each gene) or 'barcode' (genes detected per cell)
        barcodes: 0-based barcode indices to restrict the count to

    Returns:
        A numpy array of detection counts
    """
    where = "count != 0"
    if barcodes is not None:
        con.register("keep_barcodes", pd.DataFrame({"idx": barcodes + 1}))  # mtx file has 1-based index
        where += " AND barcode IN (SELECT idx FROM keep_barcodes)"
    totals = con.sql(
        f"""
    SELECT
        {by} AS idx,
        COUNT(*) AS total
    FROM mtx
    WHERE {where}
    GROUP BY {by};
    """
    ).fetchnumpy()
    counts = np.zeros(size, dtype=int)
    counts[np.asarray(totals["idx"], dtype=np.int64) - 1] = totals["total"]
    return counts


def load_partial_mtx(con: duckdb.DuckDBPyConnection, genes: np.ndarray, barcodes: np.ndarray) -> sp.csr_matrix:
    """
    Load a subset of a sparse mtx into a cells x genes csr matrix

    Args:
        con: duckdb connection with existing mtx and mtx_metadata tables
        genes: 0-based gene (row) indices to keep
        barcodes: 0-based barcode (column) indices to keep

    Returns:
        A csr matrix of shape (len(barcodes), len(genes)), in the order given
    """
    nrows, ncols = con.sql("SELECT nrows, ncols FROM mtx_metadata;").fetchall()[0]
    con.register("keep_genes", pd.DataFrame({"idx": genes + 1}))
    con.register("keep_barcodes", pd.DataFrame({"idx": barcodes + 1}))
    triplets = con.sql(
        """
    SELECT
        gene,
        barcode,
        count
    FROM mtx
    WHERE gene IN (SELECT idx FROM keep_genes)
      AND barcode IN (SELECT idx FROM keep_barcodes);
    """
    ).fetchnumpy()
    # lookup from 1-based mtx index to position in the output
    gene_lookup = np.full(nrows + 1, -1, dtype=np.int64)
    gene_lookup[genes + 1] = np.arange(len(genes))
    barcode_lookup = np.full(ncols + 1, -1, dtype=np.int64)
    barcode_lookup[barcodes + 1] = np.arange(len(barcodes))
    rows = barcode_lookup[np.asarray(triplets["barcode"], dtype=np.int64)]
    cols = gene_lookup[np.asarray(triplets["gene"], dtype=np.int64)]
    data = np.asarray(triplets["count"], dtype=np.float32)

    return sp.coo_matrix((data, (rows, cols)), shape=(len(barcodes), len(genes))).tocsr()


def read_features(feature_file: Path) -> pd.DataFrame:
    """
    Read features.tsv (gene id, gene symbol, feature type) or a legacy genes.tsv

    Returns:
        DataFrame with columns gene_ids, gene_symbols and feature_types
    """
    try:
        features = pd.read_csv(feature_file, sep="\t", header=None, dtype=str, keep_default_na=False)
    except pd.errors.EmptyDataError as err:
        raise LoadError(f"{feature_file} is empty") from err
    gene_ids = features[0]
    gene_symbols = features[1] if features.shape[1] > 1 else gene_ids
    feature_types = features[2] if features.shape[1] > 2 else pd.Series("", index=features.index)
    return pd.DataFrame({"gene_ids": gene_ids, "gene_symbols": gene_symbols, "feature_types": feature_types})


def read_barcodes(barcode_file: Path) -> pd.Index:
    """Read barcodes.tsv into an index of cell barcodes"""
    try:
        barcodes = pd.read_csv(barcode_file, sep="\t", header=None, dtype=str, usecols=[0])
    except pd.errors.EmptyDataError as err:
        raise LoadError(f"{barcode_file} is empty") from err
    return pd.Index(barcodes[0], name="cell_id")


def load_10x_matrix(
    matrix_dir: Path, min_cells: int = 0, min_features: int = 0, threads: int = 1
) -> anndata.AnnData:
    """
    Load a 10x style matrix directory into a cells x genes AnnData of raw counts.

    Cells detecting fewer than @min_features genes are dropped first, then genes
    detected in fewer than @min_cells of the remaining cells.

    Args:
        matrix_dir: Directory with matrix.mtx, barcodes.tsv and features.tsv
        min_cells: Minimum number of cells a gene must be detected in
        min_features: Minimum number of genes a cell must detect
        threads: Number of threads for duckdb

    Returns:
        AnnData with raw counts in X
    """
    files = resolve_matrix_files(matrix_dir)
    features = read_features(files["features"])
    barcodes = read_barcodes(files["barcodes"])

    with duckdb.connect() as con:
        con.sql(f"SET threads TO {threads};")
        nrows, ncols = load_mtx_table(files["mtx"], con)
        if nrows != len(features):
            raise LoadError(f"{files['features']} lists {len(features)} features but the matrix has {nrows} rows")
        if ncols != len(barcodes):
            raise LoadError(f"{files['barcodes']} lists {len(barcodes)} barcodes but the matrix has {ncols} columns")
        features_per_barcode = count_detected_by(con, ncols, by="barcode")
        keep_barcodes = np.flatnonzero(features_per_barcode >= min_features)
        cells_per_gene = count_detected_by(con, nrows, by="gene", barcodes=keep_barcodes)
        keep_genes = np.flatnonzero(cells_per_gene >= min_cells)
        counts = load_partial_mtx(con, keep_genes, keep_barcodes)

    var = features.iloc[keep_genes].reset_index(drop=True)
    var["n_cells"] = cells_per_gene[keep_genes]
    var.index = pd.Index(var.pop("gene_symbols"), name=None)
    obs = pd.DataFrame(index=barcodes[keep_barcodes].rename(None))
    adata = anndata.AnnData(X=counts, obs=obs, var=var)
    adata.var_names_make_unique()
    logger.debug(
        f"Loaded {matrix_dir}: kept {adata.n_obs}/{ncols} cells and {adata.n_vars}/{nrows} genes "
        f"(min_cells={min_cells}, min_features={min_features})"
    )
    return adata


def load_hto_matrix(matrix_dir: Path, drop_features: tuple = (), threads: int = 1) -> anndata.AnnData:
    """
    Load a hashtag count matrix as a cells x tags AnnData

    When the directory holds a combined feature-barcoding matrix only
    'Antibody Capture' features are kept.

    Args:
        matrix_dir: Directory with matrix.mtx, barcodes.tsv and features.tsv
        drop_features: Feature names to discard (e.g. the 'unmapped' row of CITE-seq-Count)
        threads: Number of threads for duckdb
    """
    hto = load_10x_matrix(matrix_dir, threads=threads)
    if (hto.var["feature_types"] == "Antibody Capture").any():
        hto = hto[:, hto.var["feature_types"] == "Antibody Capture"]
    hto = hto[:, ~hto.var_names.isin(list(drop_features))].copy()
    if hto.n_vars == 0:
        raise LoadError(f"No hashtag features left in {matrix_dir}")
    return hto
