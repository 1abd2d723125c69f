import json
from pathlib import Path

import pytest

from cart_utils.options import (
    LSC_MARKERS,
    AnalysisOptions,
    DemuxOptions,
    ReductionOptions,
    load_options,
    options_from_dict,
)
from cart_utils.validation import ParameterError, validateName


def test_defaults():
    options = load_options()
    assert options == AnalysisOptions()
    assert options.qc.max_mito_fraction == 0.10
    assert options.normalize.n_top_genes == 2000
    assert options.reduction.n_pcs == 20
    assert options.de.lsc_markers == LSC_MARKERS
    assert options.demux.quantile_range[0] == 0.1
    assert options.demux.quantile_range[-1] == 0.9


def test_load_from_json(tmp_path):
    config = tmp_path / "analysis.json"
    config.write_text(
        json.dumps(
            {
                "seed": 7,
                "qc": {"max_mito_fraction": 0.2},
                "cluster": {"resolutions": [0.5, 1.2], "markers_resolution": 1.2},
                "demux": {"sample_names": {"HTO1": "T1-CD19neg"}},
            }
        )
    )
    options = load_options(config)
    assert options.seed == 7
    assert options.qc.max_mito_fraction == 0.2
    assert options.cluster.resolutions == (0.5, 1.2)
    assert options.demux.sample_names == {"HTO1": "T1-CD19neg"}
    assert options.normalize.flavor == "seurat_v3"


def test_unknown_keys():
    with pytest.raises(ParameterError, match="mito"):
        options_from_dict({"qc": {"mito": 0.1}})
    with pytest.raises(ParameterError, match="plots"):
        options_from_dict({"plots": {}})


@pytest.mark.parametrize(
    "config",
    [
        {"qc": {"max_mito_fraction": 2}},
        {"demux": {"positive_quantile": 0}},
        {"demux": {"quantile_range": []}},
        {"normalize": {"flavor": "cell_ranger"}},
        {"reduction": {"n_comps": 10, "n_pcs": 20}},
        {"de": {"correction": "holm"}},
        {"de": {"min_pct": 1.5}},
        {"load": {"min_cells": -1}},
    ],
)
def test_invalid_values(config):
    with pytest.raises(ParameterError):
        options_from_dict(config)


def test_params_are_plain_and_distinct():
    params = AnalysisOptions().as_params()
    assert params["reduction"] == {
        "n_comps": 50,
        "n_pcs": 20,
        "scale_max_value": 10.0,
        "n_neighbors": 30,
        "min_dist": 0.3,
        "umap_seed": 42,
    }
    changed = AnalysisOptions(reduction=ReductionOptions(n_pcs=10)).as_params()
    assert params != changed


def test_options_are_frozen():
    with pytest.raises(AttributeError):
        DemuxOptions().positive_quantile = 0.5


def test_validate_name():
    validateName("T1-CD19neg", "Sample name")
    with pytest.raises(ParameterError):
        validateName("1sample", "Sample name")
    with pytest.raises(ParameterError):
        validateName("bad name", "Sample name")


def test_shipped_config_loads():
    config = Path(__file__).resolve().parents[1] / "config" / "analysis.json"
    options = load_options(config)
    assert options.demux.sample_names["HTO1"] == "T1-CD19neg"
    assert options.cluster.resolutions == (0.5, 1.0)


def test_unreadable_config(tmp_path):
    with pytest.raises(ParameterError):
        load_options(tmp_path / "missing.json")
    broken = tmp_path / "broken.json"
    broken.write_text("{not json")
    with pytest.raises(ParameterError):
        load_options(broken)
