"""
Content-addressed caching of stage snapshots and result tables.

Every cached object is keyed by a fingerprint of its inputs and parameters.
A snapshot or table is only reused when the stored fingerprint matches the
current one; otherwise it is recomputed and overwritten.
"""

import hashlib
import json
from pathlib import Path
from typing import Callable, Optional

import anndata
import h5py
import numpy as np
import pandas as pd
import scipy.sparse as sp

from cart_utils.base_logger import logger

FINGERPRINT_ATTR = "cache-fingerprint"


def file_digest(path: Path) -> str:
    """sha256 hex digest of a file"""
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1 << 20), b""):
            h.update(chunk)
    return h.hexdigest()


def fingerprint(*parts) -> str:
    """sha256 of the JSON encoding of @parts"""
    payload = json.dumps(parts, sort_keys=True, default=str)
    return hashlib.sha256(payload.encode()).hexdigest()


def stage_fingerprint(upstream: str, stage: str, params: dict) -> str:
    """Fingerprint of a stage output, from the fingerprint of its input and its parameters"""
    return fingerprint(upstream, stage, params)


def dataset_fingerprint(adata: anndata.AnnData) -> str:
    """
    Fingerprint of a dataset: a digest of its matrix and cell / gene names.
    Computed from the data every time, so an edited copy of a stage output
    never matches the key recorded for that stage.
    """
    h = hashlib.sha256()
    X = adata.X
    if sp.issparse(X):
        X = sp.csr_matrix(X)
        for arr in (X.indptr, X.indices, X.data):
            h.update(np.ascontiguousarray(arr).tobytes())
    else:
        h.update(np.ascontiguousarray(X).tobytes())
    h.update("\n".join(adata.obs_names).encode())
    h.update("\n".join(adata.var_names).encode())
    return h.hexdigest()


def read_snapshot_fingerprint(path: Path) -> Optional[str]:
    """Fingerprint stored in an h5ad snapshot, None if absent or unreadable"""
    try:
        with h5py.File(path, "r") as hdf:
            value = hdf.attrs.get(FINGERPRINT_ATTR)
    except OSError:
        return None
    if isinstance(value, bytes):
        value = value.decode()
    return value


def write_snapshot(adata: anndata.AnnData, path: Path, key: str) -> None:
    """Write @adata to @path and tag the file with its fingerprint"""
    path.parent.mkdir(parents=True, exist_ok=True)
    adata.write_h5ad(path)
    with h5py.File(path, "r+") as hdf:
        hdf.attrs[FINGERPRINT_ATTR] = key


def cached_stage(
    cache_dir: Optional[Path], stage: str, key: str, compute: Callable[[], anndata.AnnData]
) -> anndata.AnnData:
    """
    Return the output of a stage, from its snapshot when the fingerprint matches

    Args:
        cache_dir: Directory holding <stage>.h5ad snapshots; None disables caching
        stage: Stage name
        key: Fingerprint of the stage input and parameters
        compute: Produces the stage output when no valid snapshot exists

    Returns:
        Stage output, with uns['fingerprint'] set to @key
    """
    path = Path(cache_dir) / f"{stage}.h5ad" if cache_dir is not None else None
    if path is not None and path.exists():
        stored = read_snapshot_fingerprint(path)
        if stored == key:
            logger.info(f"Reusing {stage} snapshot {path}")
            return anndata.read_h5ad(path)
        logger.info(f"Snapshot {path} is stale, recomputing {stage}")
    adata = compute()
    adata.uns["fingerprint"] = key
    if path is not None:
        write_snapshot(adata, path, key)
        logger.debug(f"Wrote {stage} snapshot to {path}")
    return adata


class TableCache:
    """
    Result tables keyed by fingerprint, held in memory for the run and
    optionally persisted as <prefix>_<key>.tsv with a JSON sidecar holding the full key
    """

    def __init__(self, cache_dir: Optional[Path] = None, prefix: str = "table", str_columns: tuple = ()):
        self.cache_dir = Path(cache_dir) if cache_dir is not None else None
        self.prefix = prefix
        # columns read back as strings (gene symbols, cluster labels)
        self.str_columns = str_columns
        self.tables: dict[str, pd.DataFrame] = {}

    def _paths(self, key: str) -> tuple[Path, Path]:
        stem = f"{self.prefix}_{key[:16]}"
        return self.cache_dir / f"{stem}.tsv", self.cache_dir / f"{stem}.json"

    def get(self, key: str) -> Optional[pd.DataFrame]:
        if key in self.tables:
            return self.tables[key].copy()
        if self.cache_dir is None:
            return None
        table_path, meta_path = self._paths(key)
        if not (table_path.exists() and meta_path.exists()):
            return None
        with open(meta_path) as f:
            meta = json.load(f)
        if meta.get("key") != key:
            logger.info(f"Cached table {table_path} does not match the current inputs, recomputing")
            return None
        table = pd.read_csv(table_path, sep="\t", keep_default_na=False, na_values=[""])
        for col in self.str_columns:
            if col in table.columns:
                table[col] = table[col].astype(str)
        self.tables[key] = table
        return table.copy()

    def put(self, key: str, table: pd.DataFrame, params: Optional[dict] = None) -> None:
        self.tables[key] = table.copy()
        if self.cache_dir is None:
            return
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        table_path, meta_path = self._paths(key)
        table.to_csv(table_path, sep="\t", index=False)
        with open(meta_path, "w") as f:
            json.dump({"key": key, "params": params or {}}, f, indent=2, default=str)

    def get_or_compute(
        self, key: str, compute: Callable[[], pd.DataFrame], params: Optional[dict] = None
    ) -> pd.DataFrame:
        table = self.get(key)
        if table is None:
            table = compute()
            self.put(key, table, params)
        return table
