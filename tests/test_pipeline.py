"""
Test the complete pipeline.
"""

import numpy as np
import pandas as pd  # type: ignore
import pytest

import scqc.pipeline as pl
import scqc.tools as tl
import scqc.utilities as ut

ut.set_processors_count(1)

# pylint: disable=missing-function-docstring


def _toy_store() -> ut.MatrixStore:
    counts = np.array(
        [
            [5, 6, 0, 6, 7, 5],
            [4, 4, 0, 5, 5, 6],
            [1, 1, 0, 1, 1, 1],
            [0, 0, 0, 0, 0, 0],
        ]
    )
    return ut.MatrixStore(
        counts,
        gene_ids=["GAPDH", "ACTB", "MT-CO1", "EMPTY"],
        cell_ids=[f"C{index}" for index in range(6)],
    )


def _synthetic_store() -> ut.MatrixStore:
    generator = np.random.default_rng(123456)

    genes_count = 200
    gene_ids = [f"MT-{index}" for index in range(10)] + [f"G{index}" for index in range(10, genes_count)]
    proportions = generator.uniform(0.5, 1.5, size=genes_count)
    proportions[-3:] = 0
    proportions /= np.sum(proportions)

    depths = generator.uniform(5000, 10000, size=80)
    depths[70:75] = 100

    cells_proportions = np.repeat(proportions[:, None], 80, axis=1)
    cells_proportions[:10, 75:] *= 30
    cells_proportions /= np.sum(cells_proportions, axis=0)[None, :]

    counts = generator.poisson(cells_proportions * depths[None, :])
    return ut.MatrixStore(
        counts,
        gene_ids=gene_ids,
        cell_ids=[f"C{index}" for index in range(80)],
        cells=pd.DataFrame(dict(batch=(["a", "b"] * 40))),
        name="synthetic",
    )


def test_toy_pipeline() -> None:
    store = _toy_store()
    result = pl.run_qc_pipeline(store)

    assert result.full is store
    assert list(ut.get_v_numpy(store, "discard")) == [False, False, False, True]
    assert list(ut.get_o_numpy(store, "discard")) == [False, False, True, False, False, False]
    assert not np.any(np.isnan(ut.get_o_numpy(store, "subset_mito_percent")))
    assert set(result.thresholds.keys()) == {"sum", "detected", "subset_mito_percent"}

    clean = result.clean
    assert clean.name == "clean"
    assert clean.shape == (3, 5)
    assert clean.gene_ids == ["GAPDH", "ACTB", "MT-CO1"]
    assert clean.cell_ids == ["C0", "C1", "C3", "C4", "C5"]
    assert list(ut.get_o_numpy(clean, "full_cell_index")) == [0, 1, 3, 4, 5]
    assert list(ut.get_v_numpy(clean, "full_gene_index")) == [0, 1, 2]
    assert not np.any(np.isnan(ut.get_o_numpy(clean, "subset_mito_percent")))

    sums = np.array([10, 11, 12, 13, 12])
    factors = ut.get_o_numpy(clean, "size_factor")
    assert np.allclose(factors, sums / np.mean(sums))
    assert np.all(ut.get_o_numpy(clean, "size_factor_fallback"))
    assert np.allclose(ut.get_o_numpy(clean, "library_size_factor"), factors)

    for assay in ("logcounts_raw", "logcpm", "logcounts"):
        data = ut.to_numpy_matrix(clean.get_assay(assay))
        assert data.shape == clean.shape
        assert np.all(np.isfinite(data))


def test_synthetic_pipeline() -> None:
    store = _synthetic_store()
    result = pl.run_qc_pipeline(store)

    discard = ut.get_o_numpy(store, "discard")
    assert np.all(discard[70:])
    assert np.sum(discard[:70]) <= 5
    assert np.all(ut.get_o_numpy(store, "sum_outlier")[70:75])
    assert np.all(ut.get_o_numpy(store, "subset_mito_percent_outlier")[75:])
    assert list(np.where(ut.get_v_numpy(store, "discard"))[0]) == [197, 198, 199]

    clean = result.clean
    assert clean.n_cells == 80 - int(np.sum(discard))
    assert clean.n_genes == 197
    assert set(clean.assay_names) == {"counts", "logcounts_raw", "logcpm", "logcounts"}

    factors = ut.get_o_numpy(clean, "size_factor")
    assert np.all(factors > 0)
    assert np.isclose(np.mean(factors), 1)
    assert not np.any(ut.get_o_numpy(clean, "size_factor_fallback"))
    library_factors = ut.get_o_numpy(clean, "library_size_factor")
    assert np.corrcoef(factors, library_factors)[0, 1] > 0.95

    table = tl.get_cell_metrics(store)
    for column in ("sum", "detected", "subset_mito_percent", "sum_outlier", "discard"):
        assert column in table.columns
    assert list(table.index) == store.cell_ids


def test_composition_pipeline() -> None:
    shared = np.full((50, 60), 20)
    different = np.zeros((5, 60), dtype="int64")
    different[:, 30:] = 400
    store = ut.MatrixStore(
        np.concatenate([shared, different]),
        gene_ids=[f"S{index}" for index in range(50)] + [f"D{index}" for index in range(5)],
        cell_ids=[f"C{index}" for index in range(60)],
        cells=pd.DataFrame(dict(batch=["A"] * 30 + ["B"] * 30)),
    )

    result = pl.run_qc_pipeline(store, clustering="batch")
    assert not np.any(ut.get_o_numpy(store, "discard"))

    clean = result.clean
    assert clean.shape == (55, 60)
    assert np.allclose(ut.get_o_numpy(clean, "size_factor"), 1, rtol=1e-4)
    library_factors = ut.get_o_numpy(clean, "library_size_factor")
    assert np.isclose(library_factors[-1] / library_factors[0], 3)


def test_pipeline_fixed_thresholds() -> None:
    store = _toy_store()
    result = pl.run_qc_pipeline(store, properly_sampled_max_cell_total=12)
    assert list(ut.get_o_numpy(store, "properly_sampled_cell")) == [True, True, True, True, False, True]
    assert result.clean.cell_ids == ["C0", "C1", "C3", "C5"]


def test_pipeline_stage_errors() -> None:
    store = _toy_store()
    spike = tl.GeneSubset(name="spike", gene_ids=("ERCC-00002",))
    with pytest.raises(ut.NotFound, match="^analyze_clean_cells: "):
        pl.run_qc_pipeline(store, subsets=[spike])

    with pytest.raises(ut.DegenerateInput, match="^extract_clean_data: "):
        pl.run_qc_pipeline(_toy_store(), properly_sampled_min_cell_total=1000)


def test_extract_clean_data() -> None:
    store = _toy_store()
    pl.analyze_clean_genes(store)
    pl.analyze_clean_cells(store)
    clean = pl.extract_clean_data(store, name="only_clean")
    assert clean is not None
    assert clean.name == "only_clean"
    assert clean.shape == (3, 5)

    ut.set_o_data(store, "discard", np.full(6, True))
    assert pl.extract_clean_data(store) is None


def test_find_qc_subsets() -> None:
    store = _toy_store()
    subsets = pl.find_qc_subsets(store)
    assert subsets == [tl.GeneSubset(name="mito", gene_ids=("MT-CO1",))]

    subsets = pl.find_qc_subsets(store, spike_in_gene_patterns=["EMPTY"])
    assert [subset.name for subset in subsets] == ["mito", "spike"]
    assert subsets[1].gene_ids == ("EMPTY",)


def test_normalize_clean_data() -> None:
    store = _toy_store()
    pl.analyze_clean_genes(store)
    pl.analyze_clean_cells(store)
    clean = pl.extract_clean_data(store)
    assert clean is not None

    pl.normalize_clean_data(clean, size_factors_center="median")
    factors = ut.get_o_numpy(clean, "size_factor")
    assert np.isclose(np.median(factors), 1)
    assert set(clean.assay_names) == {"counts", "logcounts_raw", "logcpm", "logcounts"}
