"""Analysis parameters, grouped per stage and loaded from a JSON file"""

import dataclasses
from dataclasses import dataclass, field
from pathlib import Path

from cart_utils.io import readJSON
from cart_utils.validation import ParameterError, validateName, validate_fraction, validate_positive

# Leukemic stem cell markers tested between timepoints
LSC_MARKERS = ("CD34", "CD38", "IL3RA", "CD99", "CD9", "CD82", "CD44", "CD47", "ITGA6", "PROM1")


@dataclass(frozen=True)
class LoadOptions:
    """
    Attributes:
        min_cells: Genes detected in fewer cells are dropped
        min_features: Cells detecting fewer genes are dropped
        threads: Number of threads for duckdb
    """

    min_cells: int = 3
    min_features: int = 200
    threads: int = 1

    def __post_init__(self):
        validate_positive(self.min_cells, "min_cells", allow_zero=True)
        validate_positive(self.min_features, "min_features", allow_zero=True)
        validate_positive(self.threads, "threads")


@dataclass(frozen=True)
class DemuxOptions:
    """
    Attributes:
        positive_quantile: Quantile of the background fit above which a tag is positive
        kmeans_starts: Number of k-means restarts
        sample_names: Mapping of hashtag name to sample name; unmapped tags keep their name
        drop_features: Hashtag matrix rows that are not sample tags
        quantile_range: Quantiles swept by the MULTI-seq classification
        max_iterations: Maximum rounds of negative-cell removal in MULTI-seq classification
    """

    positive_quantile: float = 0.99
    kmeans_starts: int = 100
    sample_names: dict = field(default_factory=dict)
    drop_features: tuple = ("unmapped",)
    quantile_range: tuple = tuple(round(0.1 + 0.05 * i, 2) for i in range(17))
    max_iterations: int = 5

    def __post_init__(self):
        validate_fraction(self.positive_quantile, "positive_quantile", inclusive_zero=False)
        validate_positive(self.kmeans_starts, "kmeans_starts")
        validate_positive(self.max_iterations, "max_iterations")
        for name in self.sample_names.values():
            validateName(name, "Sample name")
        if not self.quantile_range:
            raise ParameterError("quantile_range must not be empty")
        for q in self.quantile_range:
            validate_fraction(q, "quantile_range")


@dataclass(frozen=True)
class QCOptions:
    """
    Attributes:
        max_mito_fraction: Cells above this fraction of mitochondrial counts fail
        mito_prefix: Prefix of mitochondrial gene symbols
        singlets_only: Doublet and Negative cells fail
        min_features: Cells detecting fewer genes fail (0 disables)
        max_features: Cells detecting more genes fail (0 disables)
    """

    max_mito_fraction: float = 0.10
    mito_prefix: str = "MT-"
    singlets_only: bool = True
    min_features: int = 0
    max_features: int = 0

    def __post_init__(self):
        validate_fraction(self.max_mito_fraction, "max_mito_fraction")
        validate_positive(self.min_features, "min_features", allow_zero=True)
        validate_positive(self.max_features, "max_features", allow_zero=True)
        if self.max_features and self.max_features < self.min_features:
            raise ParameterError("max_features must be >= min_features")


@dataclass(frozen=True)
class NormalizeOptions:
    """
    Attributes:
        scale_factor: Total counts each cell is scaled to before log transform
        n_top_genes: Number of variable features
        flavor: Variable feature method, 'seurat_v3' (vst on counts) or 'seurat' (dispersion)
    """

    scale_factor: float = 1e4
    n_top_genes: int = 2000
    flavor: str = "seurat_v3"

    def __post_init__(self):
        validate_positive(self.scale_factor, "scale_factor")
        validate_positive(self.n_top_genes, "n_top_genes")
        if self.flavor not in ("seurat_v3", "seurat"):
            raise ParameterError(f"Unknown variable feature flavor: {self.flavor}")


@dataclass(frozen=True)
class ReductionOptions:
    """
    Attributes:
        n_comps: Number of principal components computed
        n_pcs: Number of components used for UMAP and the neighbor graph
        scale_max_value: Scaled values are clipped at this value (0 disables)
        n_neighbors: Neighbors of the UMAP graph
        min_dist: UMAP minimum distance
        umap_seed: Random seed of the UMAP layout
    """

    n_comps: int = 50
    n_pcs: int = 20
    scale_max_value: float = 10.0
    n_neighbors: int = 30
    min_dist: float = 0.3
    umap_seed: int = 42

    def __post_init__(self):
        validate_positive(self.n_comps, "n_comps")
        validate_positive(self.n_pcs, "n_pcs")
        if self.n_pcs > self.n_comps:
            raise ParameterError("n_pcs must be <= n_comps")
        validate_positive(self.scale_max_value, "scale_max_value", allow_zero=True)
        validate_positive(self.n_neighbors, "n_neighbors")
        validate_positive(self.min_dist, "min_dist", allow_zero=True)


@dataclass(frozen=True)
class ClusterOptions:
    """
    Attributes:
        resolutions: Community detection resolutions, each stored as its own label
        n_neighbors: k of the nearest neighbor graph
        metric: Distance metric of the neighbor graph
        markers_resolution: Resolution whose clusters are used for marker detection
    """

    resolutions: tuple = (0.5,)
    n_neighbors: int = 20
    metric: str = "euclidean"
    markers_resolution: float = 0.5

    def __post_init__(self):
        if not self.resolutions:
            raise ParameterError("At least one clustering resolution is required")
        for resolution in self.resolutions:
            validate_positive(resolution, "resolution")
        if self.markers_resolution not in self.resolutions:
            raise ParameterError(f"markers_resolution {self.markers_resolution} is not in resolutions")
        validate_positive(self.n_neighbors, "n_neighbors")


@dataclass(frozen=True)
class DEOptions:
    """
    Attributes:
        min_pct: Genes expressed in a smaller fraction of cells in both groups are not tested
        logfc_threshold: Genes with a smaller absolute log2 fold-change are not tested
        only_pos: Only report genes higher in the first group
        correction: Multiple testing correction, 'bonferroni', 'bh' or 'none'
        lsc_markers: Genes compared between timepoints
        timepoint_1: Timepoint of the first group in the marker comparison
        timepoint_2: Timepoint of the second group in the marker comparison
    """

    min_pct: float = 0.1
    logfc_threshold: float = 0.25
    only_pos: bool = False
    correction: str = "bonferroni"
    lsc_markers: tuple = LSC_MARKERS
    timepoint_1: str = "T1"
    timepoint_2: str = "T2"

    def __post_init__(self):
        validate_fraction(self.min_pct, "min_pct")
        validate_positive(self.logfc_threshold, "logfc_threshold", allow_zero=True)
        if self.correction not in ("bonferroni", "bh", "none"):
            raise ParameterError(f"Unknown multiple testing correction: {self.correction}")


@dataclass(frozen=True)
class AnalysisOptions:
    """
    All parameters of one analysis run
    """

    seed: int = 0
    load: LoadOptions = field(default_factory=LoadOptions)
    demux: DemuxOptions = field(default_factory=DemuxOptions)
    qc: QCOptions = field(default_factory=QCOptions)
    normalize: NormalizeOptions = field(default_factory=NormalizeOptions)
    reduction: ReductionOptions = field(default_factory=ReductionOptions)
    cluster: ClusterOptions = field(default_factory=ClusterOptions)
    de: DEOptions = field(default_factory=DEOptions)

    def as_params(self) -> dict:
        """Plain dictionary of all parameters, used for cache fingerprints"""
        return dataclasses.asdict(self)


def _build_section(cls, values: dict, section: str):
    known = {f.name for f in dataclasses.fields(cls)}
    unknown = set(values) - known
    if unknown:
        raise ParameterError(f"Unknown option(s) in '{section}': {', '.join(sorted(unknown))}")
    # JSON arrays become tuples to keep options hashable and immutable
    return cls(**{k: tuple(v) if isinstance(v, list) else v for k, v in values.items()})


def options_from_dict(config: dict) -> AnalysisOptions:
    """
    Build AnalysisOptions from a (parsed JSON) dictionary; missing values keep their defaults
    """
    section_classes = {
        "load": LoadOptions,
        "demux": DemuxOptions,
        "qc": QCOptions,
        "normalize": NormalizeOptions,
        "reduction": ReductionOptions,
        "cluster": ClusterOptions,
        "de": DEOptions,
    }
    unknown = set(config) - set(section_classes) - {"seed"}
    if unknown:
        raise ParameterError(f"Unknown option section(s): {', '.join(sorted(unknown))}")
    kwargs = {name: _build_section(cls, config.get(name, {}), name) for name, cls in section_classes.items()}
    return AnalysisOptions(seed=config.get("seed", 0), **kwargs)


def load_options(config_path: Path | None = None) -> AnalysisOptions:
    """Read analysis options from a JSON file (defaults when no file is given)"""
    if config_path is None:
        return AnalysisOptions()
    return options_from_dict(readJSON(config_path))
