import dataclasses

import numpy as np
import pandas as pd
import pytest

from cart_utils.options import DEOptions
from cart_utils.validation import EmptyResultError, ParameterError
from differential_expression import (
    RESULT_COLUMNS,
    compare_groups,
    compare_labels,
    de_cache,
    find_all_markers,
    lsc_marker_comparison,
)

UNGATED = DEOptions(min_pct=0.0, logfc_threshold=0.0)


def groups(adata):
    labels = adata.obs["group"]
    return list(adata.obs_names[labels == "A"]), list(adata.obs_names[labels == "B"])


def test_result_columns(expression_adata):
    cells_a, cells_b = groups(expression_adata)
    result = compare_groups(expression_adata, cells_a, cells_b, options=UNGATED)
    assert list(result.columns) == RESULT_COLUMNS
    assert set(result["gene"]) == set(expression_adata.var_names)


def test_detects_higher_gene(expression_adata):
    cells_a, cells_b = groups(expression_adata)
    result = compare_groups(expression_adata, cells_a, cells_b, options=UNGATED).set_index("gene")
    assert result.loc["GENE_UP", "avg_log2FC"] > 2
    assert result.loc["GENE_UP", "p_val"] < 1e-5
    assert result.loc["GENE_UP", "mean_1"] > result.loc["GENE_UP", "mean_2"]
    assert result.index[0] == "GENE_UP"


def test_identical_distributions(expression_adata):
    cells_a, cells_b = groups(expression_adata)
    result = compare_groups(expression_adata, cells_a, cells_b, options=UNGATED).set_index("gene")
    same = ["GENE_B", "GENE_C", "GENE_D"]
    np.testing.assert_allclose(result.loc[same, "avg_log2FC"], 0.0, atol=1e-6)
    np.testing.assert_allclose(result.loc[same, "p_val"], 1.0)


def test_group_compared_with_itself(expression_adata):
    cells_a, _ = groups(expression_adata)
    result = compare_groups(expression_adata, cells_a, list(cells_a), options=UNGATED)
    assert set(result["gene"]) == set(expression_adata.var_names)
    np.testing.assert_allclose(result["avg_log2FC"], 0.0, atol=1e-12)
    np.testing.assert_allclose(result["p_val"], 1.0)
    np.testing.assert_allclose(result["mean_1"], result["mean_2"])


def test_antisymmetric(expression_adata):
    cells_a, cells_b = groups(expression_adata)
    forward = compare_groups(expression_adata, cells_a, cells_b, options=UNGATED).set_index("gene")
    backward = compare_groups(expression_adata, cells_b, cells_a, options=UNGATED).set_index("gene")
    backward = backward.loc[forward.index]
    np.testing.assert_allclose(forward["avg_log2FC"], -backward["avg_log2FC"], atol=1e-6)
    np.testing.assert_allclose(forward["p_val"], backward["p_val"])
    np.testing.assert_allclose(forward["pct_1"], backward["pct_2"])


def test_bonferroni_over_tested_genes(expression_adata):
    cells_a, cells_b = groups(expression_adata)
    result = compare_groups(expression_adata, cells_a, cells_b, options=UNGATED)
    np.testing.assert_allclose(result["p_val_adj"], np.minimum(result["p_val"] * len(result), 1.0))
    bh = compare_groups(expression_adata, cells_a, cells_b, options=dataclasses.replace(UNGATED, correction="bh"))
    assert (bh["p_val_adj"] >= bh["p_val"] - 1e-12).all()


def test_gates_skip_uninformative_genes(expression_adata):
    cells_a, cells_b = groups(expression_adata)
    result = compare_groups(expression_adata, cells_a, cells_b, options=DEOptions(logfc_threshold=0.25))
    assert list(result["gene"]) == ["GENE_UP"]


def test_only_pos(expression_adata):
    cells_a, cells_b = groups(expression_adata)
    options = DEOptions(logfc_threshold=0.25, only_pos=True)
    assert compare_groups(expression_adata, cells_b, cells_a, options=options).empty
    assert list(compare_groups(expression_adata, cells_a, cells_b, options=options)["gene"]) == ["GENE_UP"]


def test_gene_subset(expression_adata):
    cells_a, cells_b = groups(expression_adata)
    result = compare_groups(expression_adata, cells_a, cells_b, genes=["GENE_C"], options=UNGATED)
    assert list(result["gene"]) == ["GENE_C"]


def test_invalid_groups(expression_adata):
    cells_a, cells_b = groups(expression_adata)
    with pytest.raises(EmptyResultError):
        compare_groups(expression_adata, [], cells_b)
    with pytest.raises(ParameterError):
        compare_groups(expression_adata, cells_a, cells_a[:2] + cells_b)
    with pytest.raises(ParameterError):
        compare_groups(expression_adata, cells_a, cells_b, genes=["NOT_A_GENE"])
    with pytest.raises(ParameterError):
        compare_groups(expression_adata, cells_a, ["UNKNOWN-1"])


def test_find_all_markers(expression_adata):
    markers = find_all_markers(expression_adata, "group", DEOptions(logfc_threshold=0.25))
    assert list(markers.columns) == ["cluster"] + RESULT_COLUMNS
    assert set(markers["cluster"]) == {"A", "B"}
    assert markers.iloc[0]["gene"] == "GENE_UP"
    adj = markers["p_val_adj"].to_numpy()
    assert (np.diff(adj) >= 0).all()


def test_find_all_markers_single_label(expression_adata):
    adata = expression_adata.copy()
    adata.obs["group"] = "A"
    assert find_all_markers(adata, "group").empty


def test_compare_labels_matches_groups(expression_adata):
    cells_a, cells_b = groups(expression_adata)
    by_label = compare_labels(expression_adata, "group", "A", "B", options=UNGATED)
    by_cells = compare_groups(expression_adata, cells_a, cells_b, options=UNGATED)
    pd.testing.assert_frame_equal(by_label, by_cells)


def test_cache_reuses_results(expression_adata, tmp_path):
    cells_a, cells_b = groups(expression_adata)
    cache = de_cache(tmp_path)
    first = compare_groups(expression_adata, cells_a, cells_b, options=UNGATED, cache=cache)
    assert len(list(tmp_path.glob("de_*.tsv"))) == 1
    # a fresh cache reads the persisted table
    second = compare_groups(expression_adata, cells_a, cells_b, options=UNGATED, cache=de_cache(tmp_path))
    pd.testing.assert_frame_equal(first, second, check_dtype=False)
    compare_groups(expression_adata, cells_a, cells_b, options=DEOptions(), cache=cache)
    assert len(list(tmp_path.glob("de_*.tsv"))) == 2


def test_cache_invalidated_by_data_change(expression_adata, tmp_path):
    cells_a, cells_b = groups(expression_adata)
    adata = expression_adata.copy()
    # stage outputs carry the key they were cached under
    adata.uns["fingerprint"] = "normalized-stage-key"
    cache = de_cache(tmp_path)
    first = compare_groups(adata, cells_a, cells_b, options=UNGATED, cache=cache)
    changed = adata.copy()
    changed.X = changed.X * 2
    second = compare_groups(changed, cells_a, cells_b, options=UNGATED, cache=cache)
    assert not np.allclose(
        first.set_index("gene")["mean_1"], second.set_index("gene").loc[first["gene"], "mean_1"]
    )


def test_lsc_marker_comparison(expression_adata):
    adata = expression_adata.copy()
    adata.obs["timepoint"] = np.where(adata.obs["group"] == "A", "T2", "T1")
    adata.obs["cd19_status"] = "CD19neg"
    options = DEOptions(lsc_markers=("GENE_UP", "GENE_B", "CD34"))
    result = lsc_marker_comparison(adata, options).set_index("gene")
    # markers are reported without expression gates, absent markers are skipped
    assert set(result.index) == {"GENE_UP", "GENE_B"}
    assert result.loc["GENE_UP", "avg_log2FC"] < 0
    assert lsc_marker_comparison(adata, options, cd19_status="CD19neg").shape == result.reset_index().shape
    with pytest.raises(EmptyResultError):
        lsc_marker_comparison(adata, options, cd19_status="CD19pos")


def test_lsc_markers_absent(expression_adata):
    adata = expression_adata.copy()
    adata.obs["timepoint"] = "T1"
    with pytest.raises(ParameterError):
        lsc_marker_comparison(adata, DEOptions(lsc_markers=("CD34",)))
