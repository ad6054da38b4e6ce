"""
Test the tools.
"""

from typing import Any

import numpy as np
import pandas as pd  # type: ignore
import pytest
from scipy import sparse  # type: ignore

import scqc.tools as tl
import scqc.utilities as ut

ut.set_processors_count(1)

# pylint: disable=missing-function-docstring

TOY_COUNTS = np.array(
    [
        [5, 6, 0, 6, 7, 5],
        [4, 4, 0, 5, 5, 6],
        [1, 1, 0, 1, 1, 1],
        [0, 0, 0, 0, 0, 0],
    ]
)


def _toy_store(**kwargs: Any) -> ut.MatrixStore:
    return ut.MatrixStore(
        TOY_COUNTS,
        gene_ids=["GAPDH", "ACTB", "MT-CO1", "EMPTY"],
        cell_ids=[f"C{index}" for index in range(6)],
        **kwargs,
    )


def _depth_store() -> ut.MatrixStore:
    base = np.arange(100) % 10 + 1
    counts = np.concatenate([np.repeat(base[:, None], 20, axis=1), np.repeat(2 * base[:, None], 20, axis=1)], axis=1)
    return ut.MatrixStore(
        counts,
        gene_ids=[f"G{index}" for index in range(100)],
        cell_ids=[f"C{index}" for index in range(40)],
        name="depth",
    )


def _composition_store() -> ut.MatrixStore:
    shared = np.full((50, 60), 20)
    different = np.zeros((5, 60), dtype="int64")
    different[:, 30:] = 400
    counts = np.concatenate([shared, different])
    return ut.MatrixStore(
        counts,
        gene_ids=[f"S{index}" for index in range(50)] + [f"D{index}" for index in range(5)],
        cell_ids=[f"C{index}" for index in range(60)],
        cells=pd.DataFrame(dict(batch=["A"] * 30 + ["B"] * 30)),
        name="composition",
    )


def test_find_named_genes() -> None:
    store = _toy_store(genes=pd.DataFrame(dict(symbol=["gapdh", "actb", "mt-co1", "empty"])))

    mask = tl.find_named_genes(store, names=["gapdh", "NOSUCHGENE"])
    assert list(mask) == [True, False, False, False]

    subset = tl.find_named_genes(store, subset="mito", patterns=["MT-.*"])
    assert subset == tl.GeneSubset(name="mito", gene_ids=("MT-CO1",))

    subset = tl.find_named_genes(store, subset="not_mito", name_property="symbol", patterns=["mt-.*"], invert=True)
    assert subset.gene_ids == ("GAPDH", "ACTB", "EMPTY")

    assert tl.find_named_genes(store, names=["ACTB"], to="is_actb") is None
    assert list(ut.get_v_numpy(store, "is_actb")) == [False, True, False, False]


def test_compute_cell_metrics() -> None:
    store = _toy_store()
    mito = tl.GeneSubset(name="mito", gene_ids=("MT-CO1",))
    tl.compute_cell_metrics(store, [mito])

    sums = ut.get_o_numpy(store, "sum")
    assert np.allclose(sums, [10, 11, 0, 12, 13, 12])
    assert np.allclose(ut.get_o_numpy(store, "detected"), [3, 3, 0, 3, 3, 3])

    subset_sums = ut.get_o_numpy(store, "subset_mito_sum")
    assert np.all(subset_sums <= sums)
    assert np.allclose(ut.get_o_numpy(store, "subset_mito_detected"), [1, 1, 0, 1, 1, 1])

    percents = ut.get_o_numpy(store, "subset_mito_percent")
    assert not np.any(np.isnan(percents))
    assert np.all((percents >= 0) & (percents <= 100))
    assert percents[2] == 0
    assert np.isclose(percents[0], 10)

    table = tl.get_cell_metrics(store)
    assert list(table.columns) == [
        "sum",
        "detected",
        "subset_mito_sum",
        "subset_mito_detected",
        "subset_mito_percent",
    ]
    assert list(table.index) == store.cell_ids


def test_compute_cell_metrics_not_inplace() -> None:
    store = _toy_store()
    frame = tl.compute_cell_metrics(store, inplace=False)
    assert frame is not None
    assert list(frame.columns) == ["sum", "detected"]
    assert not ut.has_data(store, "sum")
    assert np.allclose(ut.to_numpy_matrix(store.counts), TOY_COUNTS)


def test_compute_cell_metrics_unknown_subset() -> None:
    store = _toy_store()
    with pytest.raises(ut.NotFound):
        tl.compute_cell_metrics(store, [tl.GeneSubset(name="spike", gene_ids=("ERCC-00002",))])


def test_compute_gene_metrics() -> None:
    store = _toy_store()
    tl.compute_gene_metrics(store)
    assert np.allclose(ut.get_v_numpy(store, "mean"), [29 / 6, 24 / 6, 5 / 6, 0])
    assert np.allclose(ut.get_v_numpy(store, "detected_rate"), [5 / 6, 5 / 6, 5 / 6, 0])

    table = tl.get_gene_metrics(store)
    assert list(table.columns) == ["mean", "detected_rate"]

    with pytest.raises(ut.DegenerateInput):
        tl.compute_gene_metrics(store.subset_cols(np.zeros(6, dtype="bool")))


def test_mad_outliers_exact_thresholds() -> None:
    values = np.array([10, 12, 14, 16, 18])

    mask, thresholds = tl.compute_mad_outliers(values, nmads=2, mad_scale=1)
    assert thresholds.median == 14
    assert thresholds.mad == 2
    assert thresholds.lower == 10
    assert thresholds.upper == 18
    assert not np.any(mask)

    mask, thresholds = tl.compute_mad_outliers(values, nmads=1.5, mad_scale=1)
    assert thresholds.lower == 11
    assert thresholds.upper == 17
    assert list(mask) == [True, False, False, False, True]

    mask, thresholds = tl.compute_mad_outliers(values)
    assert np.isclose(thresholds.mad, 2 * 1.4826)
    assert np.isclose(thresholds.lower, 14 - 3 * 2 * 1.4826)
    assert not np.any(mask)


def test_mad_outliers_direction() -> None:
    values = np.array([1, 10, 10, 10, 10, 11, 9, 100])
    lower, _ = tl.compute_mad_outliers(values, direction="lower")
    upper, _ = tl.compute_mad_outliers(values, direction="upper")
    both, _ = tl.compute_mad_outliers(values, direction="both")
    assert list(np.where(lower)[0]) == [0]
    assert list(np.where(upper)[0]) == [7]
    assert list(np.where(both)[0]) == [0, 7]

    with pytest.raises(ValueError):
        tl.compute_mad_outliers(values, direction="sideways")


def test_mad_outliers_log() -> None:
    values = np.array([0, 100, 110, 120, 90, 105])
    mask, thresholds = tl.compute_mad_outliers(values, direction="lower", log=True)
    assert list(mask) == [True, False, False, False, False, False]
    assert thresholds.log
    assert np.isclose(thresholds.median, np.log(105))
    assert np.isclose(thresholds.lower, np.exp(thresholds.median - 3 * thresholds.mad))
    assert thresholds.lower < 90

    mask, _thresholds = tl.compute_mad_outliers(values, direction="upper", log=True)
    assert not mask[0]


def test_mad_outliers_non_finite() -> None:
    values = np.array([np.nan, 10, 12, 14, 16, 18])
    mask, thresholds = tl.compute_mad_outliers(values, nmads=1.5, mad_scale=1)
    assert thresholds.median == 14
    assert list(mask) == [False, True, False, False, False, True]

    with pytest.raises(ut.DegenerateInput):
        tl.compute_mad_outliers(np.array([]))
    with pytest.raises(ut.DegenerateInput):
        tl.compute_mad_outliers(np.array([np.nan, np.nan]))
    with pytest.raises(ut.DegenerateInput):
        tl.compute_mad_outliers(np.array([0, 0]), log=True)


def test_find_mad_outliers() -> None:
    store = _toy_store()
    tl.compute_cell_metrics(store)
    tl.find_mad_outliers(store, "sum", direction="lower", log=True)
    tl.find_mad_outliers(store, "detected", direction="lower", log=True)

    assert list(ut.get_o_numpy(store, "sum_outlier")) == [False, False, True, False, False, False]
    assert list(ut.get_o_numpy(store, "detected_outlier")) == [False, False, True, False, False, False]

    thresholds = tl.get_outlier_thresholds(store)
    assert set(thresholds.keys()) == {"sum", "detected"}
    assert thresholds["sum"].direction == "lower"
    assert np.isclose(thresholds["sum"].median, np.log(12))

    result = tl.find_mad_outliers(store, "sum", direction="upper", inplace=False)
    assert result is not None
    series, upper_thresholds = result
    assert list(series.index) == store.cell_ids
    assert upper_thresholds.direction == "upper"
    assert tl.get_outlier_thresholds(store)["sum"].direction == "lower"

    with pytest.raises(ut.NotFound):
        tl.find_mad_outliers(store, "no_such_metric")


def test_combine_masks() -> None:
    store = _toy_store()
    ut.set_o_data(store, "first", np.array([True, False, False, False, False, False]))
    ut.set_o_data(store, "second", np.array([False, False, True, False, False, True]))
    ut.set_o_data(store, "score", np.arange(6))

    tl.combine_masks(store, ["first", "second"])
    assert list(ut.get_o_numpy(store, "discard")) == [True, False, True, False, False, True]

    combined = tl.combine_masks(store, ["~first", "&second", "missing?"], to=None)
    assert list(combined) == [False, False, True, False, False, True]

    combined = tl.combine_masks(store, dict(other=np.array([False] * 5 + [True])), to=None, invert=True)
    assert list(combined) == [True, True, True, True, True, False]

    combined = tl.combine_masks(store, [], to=None)
    assert not np.any(combined)

    with pytest.raises(ut.NotFound):
        tl.combine_masks(store, ["first", "missing"])
    with pytest.raises(ValueError):
        tl.combine_masks(store, ["score"])


def test_find_properly_sampled_genes() -> None:
    store = _toy_store()
    tl.find_properly_sampled_genes(store)
    assert list(ut.get_v_numpy(store, "properly_sampled_gene")) == [True, True, True, False]
    assert list(ut.get_v_numpy(store, "discard")) == [False, False, False, True]
    assert list(ut.get_v_numpy(store, "detected_cells")) == [5, 5, 5, 0]

    mask = tl.find_properly_sampled_genes(store, min_cells=1, detection_limit=1, inplace=False)
    assert list(mask) == [True, True, False, False]

    tl.compute_gene_metrics(store)
    table = tl.get_gene_metrics(store)
    assert list(table.columns) == ["mean", "detected_rate", "detected_cells", "properly_sampled_gene", "discard"]


def test_find_properly_sampled_cells() -> None:
    store = _toy_store()
    tl.compute_cell_metrics(store, [tl.GeneSubset(name="mito", gene_ids=("MT-CO1",))])
    mask = tl.find_properly_sampled_cells(
        store, min_cell_total=1, max_cell_total=12, max_subset_percents=dict(mito=9.5), inplace=False
    )
    assert list(mask) == [False, True, False, True, False, True]

    tl.find_properly_sampled_cells(store, min_cell_detected=1)
    assert list(ut.get_o_numpy(store, "properly_sampled_cell")) == [True, True, False, True, True, True]


def test_filter_data() -> None:
    store = _toy_store(name="toy")
    ut.set_o_data(store, "bad_cell", np.array([False, False, True, False, False, False]))
    ut.set_v_data(store, "bad_gene", np.array([False, False, False, True]))

    result = tl.filter_data(
        store, ["~bad_cell"], ["~bad_gene"], name=".filtered", track_cells="full_cell_index", mask_genes="kept"
    )
    assert result is not None
    filtered, cells, genes = result
    assert filtered.name == "toy.filtered"
    assert filtered.shape == (3, 5)
    assert filtered.cell_ids == ["C0", "C1", "C3", "C4", "C5"]
    assert list(ut.get_o_numpy(filtered, "full_cell_index")) == [0, 1, 3, 4, 5]
    assert list(cells) == [True, True, False, True, True, True]
    assert list(genes) == [True, True, True, False]
    assert list(ut.get_v_numpy(store, "kept")) == [True, True, True, False]

    assert tl.filter_data(store, ["bad_gene?", "&bad_cell", "&~bad_cell"]) is None


def test_group_cells_data() -> None:
    store = _toy_store(cells=pd.DataFrame(dict(batch=["a", "b", "a", "b", "a", "b"])))
    grouped = tl.group_cells_data(store, groups="batch", name="pseudo_bulk")
    assert grouped is not None
    assert grouped.name == "pseudo_bulk"
    assert grouped.shape == (4, 2)
    assert grouped.cell_ids == ["a", "b"]
    assert np.allclose(ut.to_numpy_matrix(grouped.counts), [[12, 17], [9, 15], [2, 3], [0, 0]])
    assert list(ut.get_o_numpy(grouped, "grouped")) == [3, 3]

    grouped = tl.group_cells_data(store, groups=np.array([0, -1, 0, 1, 1, -1]))
    assert grouped is not None
    assert grouped.shape == (4, 2)
    assert np.allclose(ut.to_numpy_matrix(grouped.counts)[0, :], [5, 13])


def test_fixed_groups_clustering() -> None:
    profiles = np.zeros((3, 2))
    assert list(tl.FixedGroupsClustering(["x", "y", "x"]).cluster(profiles)) == [0, 1, 0]
    assert list(tl.SingleGroupClustering().cluster(profiles)) == [0, 0, 0]

    with pytest.raises(ut.DimensionMismatch):
        tl.FixedGroupsClustering(["x", "y"]).cluster(profiles)
    with pytest.raises(ut.DegenerateInput):
        tl.FixedGroupsClustering(np.array(["x", None, "x"], dtype="object")).cluster(profiles)


def test_leiden_clustering() -> None:
    generator = np.random.default_rng(123456)
    profiles = generator.normal(0, 0.1, size=(60, 20))
    profiles[:30, :10] += 5
    profiles[30:, 10:] += 5

    groups = tl.LeidenClustering(components=5, k=10).cluster(profiles)
    assert len(groups) == 60
    assert not set(groups[:30]) & set(groups[30:])

    assert np.all(tl.LeidenClustering().cluster(np.ones((10, 4))) == 0)


def test_merge_small_groups() -> None:
    profiles = np.array(
        [[1.0, 0.0, 0.0, 0.0]] * 25 + [[0.0, 0.0, 1.0, 1.0]] * 25 + [[0.0, 0.1, 1.0, 0.9]] * 3
    )
    groups = np.array([0] * 25 + [1] * 25 + [2] * 3)
    merged = tl.merge_small_groups(profiles, groups, min_group_size=20)
    assert list(np.bincount(merged)) == [25, 28]
    assert np.all(merged[-3:] == merged[25])

    merged = tl.merge_small_groups(profiles, groups, min_group_size=30)
    assert np.all(merged == 0)


def test_find_pooling_groups() -> None:
    store = _toy_store().subset_cols(["C0", "C1", "C3"])
    tl.find_pooling_groups(store, min_group_size=20)
    assert list(ut.get_o_numpy(store, "size_factor_group")) == [0, 0, 0]

    groups = tl.find_pooling_groups(_composition_store(), clustering="batch", to=None)
    assert groups is not None
    assert list(groups) == [0] * 30 + [1] * 30


def test_library_size_factors() -> None:
    store = _depth_store()
    tl.compute_library_size_factors(store)
    factors = ut.get_o_numpy(store, "size_factor")
    assert np.isclose(np.mean(factors), 1)
    assert np.allclose(factors[20:] / factors[:20], 2)

    factors = tl.compute_library_size_factors(store, center="median", to=None)
    assert factors is not None
    assert np.isclose(np.median(factors), 1)

    with pytest.raises(ut.DegenerateInput):
        tl.compute_library_size_factors(_toy_store())


def test_pooled_size_factors_depth() -> None:
    store = _depth_store()
    tl.compute_pooled_size_factors(store)
    factors = ut.get_o_numpy(store, "size_factor")
    assert np.all(factors > 0)
    assert np.isclose(np.mean(factors), 1)
    assert np.allclose(factors[20:] / factors[:20], 2, rtol=1e-4)
    assert not np.any(ut.get_o_numpy(store, "size_factor_fallback"))
    assert ut.get_m_data(store, "size_factor_fallbacks") == {}


def test_pooled_size_factors_parallel() -> None:
    base = np.arange(100) % 10 + 1
    counts = np.concatenate([np.repeat(base[:, None], 25, axis=1), np.repeat(2 * base[:, None], 25, axis=1)], axis=1)
    store = ut.MatrixStore(
        counts,
        gene_ids=[f"G{index}" for index in range(100)],
        cell_ids=[f"C{index}" for index in range(50)],
        cells=pd.DataFrame(dict(batch=(["a", "b"] * 25))),
    )

    ut.set_processors_count(2)
    try:
        tl.compute_pooled_size_factors(store, clustering="batch")
    finally:
        ut.set_processors_count(1)

    factors = ut.get_o_numpy(store, "size_factor")
    assert list(np.bincount(ut.get_o_numpy(store, "size_factor_group"))) == [25, 25]
    assert np.allclose(factors[25:] / factors[:25], 2, rtol=1e-4)
    assert np.isclose(np.mean(factors), 1)
    assert not np.any(ut.get_o_numpy(store, "size_factor_fallback"))


def test_pooled_size_factors_random_depth() -> None:
    generator = np.random.default_rng(123456)
    proportions = generator.uniform(0.5, 1.5, size=200)
    proportions /= np.sum(proportions)
    depths = np.array([2000] * 20 + [4000] * 20)
    counts = generator.poisson(proportions[:, None] * depths[None, :])
    store = ut.MatrixStore(
        counts, gene_ids=[f"G{index}" for index in range(200)], cell_ids=[f"C{index}" for index in range(40)]
    )

    tl.compute_pooled_size_factors(store)
    factors = ut.get_o_numpy(store, "size_factor")
    assert np.all(factors > 0)
    assert np.isclose(np.mean(factors), 1)
    ratio = np.mean(factors[20:]) / np.mean(factors[:20])
    assert 1.8 < ratio < 2.2


def test_pooled_size_factors_composition() -> None:
    store = _composition_store()
    tl.compute_pooled_size_factors(store, clustering="batch")
    tl.compute_library_size_factors(store, to="library_size_factor")

    factors = ut.get_o_numpy(store, "size_factor")
    assert np.allclose(factors, 1, rtol=1e-4)
    assert list(ut.get_o_numpy(store, "size_factor_group")) == [0] * 30 + [1] * 30

    library_factors = ut.get_o_numpy(store, "library_size_factor")
    assert np.isclose(library_factors[-1] / library_factors[0], 3)

    tl.compute_log_normalized(store)
    tl.compute_log_cpm(store)
    logcounts = ut.to_numpy_matrix(store.get_assay("logcounts"))
    logcpm = ut.to_numpy_matrix(store.get_assay("logcpm"))

    # The shared genes are expressed the same in both groups.
    assert np.allclose(logcounts[:50, 0], logcounts[:50, -1], atol=1e-3)
    assert not np.allclose(logcpm[:50, 0], logcpm[:50, -1], atol=0.5)


def test_pooled_size_factors_fallback() -> None:
    store = _toy_store().subset_cols(["C0", "C1", "C3", "C4", "C5"])
    tl.compute_pooled_size_factors(store)
    factors = ut.get_o_numpy(store, "size_factor")
    sums = np.array([10, 11, 12, 13, 12])
    assert np.allclose(factors, sums / np.mean(sums))
    assert np.all(ut.get_o_numpy(store, "size_factor_fallback"))
    assert ut.get_m_data(store, "size_factor_fallbacks") == {
        "0": "the group: 0 has only: 5 cells (less than: 20)"
    }

    with pytest.raises(ut.DegenerateInput):
        tl.compute_pooled_size_factors(_toy_store())

    with pytest.raises(ValueError):
        tl.compute_pooled_size_factors(store, center="mode")


def test_log_assays() -> None:
    store = _depth_store()
    tl.compute_library_size_factors(store)
    tl.compute_log_normalized(store)
    tl.compute_log_raw(store)
    tl.compute_log_cpm(store, scale=1e6)

    counts = ut.to_numpy_matrix(store.counts).astype("float64")
    factors = ut.get_o_numpy(store, "size_factor")
    logcounts = ut.to_numpy_matrix(store.get_assay("logcounts"))
    assert logcounts.shape == store.shape
    assert np.allclose(logcounts, np.log2(counts / factors[None, :] + 1))
    assert np.allclose(ut.to_numpy_matrix(store.get_assay("logcounts_raw")), np.log2(counts + 1))
    assert np.allclose(
        ut.to_numpy_matrix(store.get_assay("logcpm")), np.log2(counts / np.sum(counts, axis=0)[None, :] * 1e6 + 1)
    )

    for cell in range(store.n_cells):
        order = np.argsort(counts[:, cell], kind="stable")
        assert np.all(np.diff(logcounts[order, cell]) >= 0)

    with pytest.raises(ut.DimensionMismatch):
        tl.compute_log_normalized(store, size_factors=np.ones(3), to="bad")
    with pytest.raises(ut.DegenerateInput):
        tl.compute_log_normalized(store, size_factors=np.zeros(store.n_cells), to="bad")


def test_log_assays_sparse() -> None:
    dense = np.array([[0, 2], [3, 0], [1, 1]])
    store = ut.MatrixStore(sparse.csr_matrix(dense), gene_ids=["G1", "G2", "G3"], cell_ids=["C1", "C2"])
    tl.compute_log_normalized(store, size_factors=np.array([0.5, 2.0]))
    logcounts = ut.to_numpy_matrix(store.get_assay("logcounts"))
    assert np.allclose(logcounts, np.log2(dense / np.array([0.5, 2.0])[None, :] + 1))
    assert logcounts[0, 0] == 0
