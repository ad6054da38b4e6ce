"""
Test the utility functions.
"""

from typing import Any

import numpy as np
import pandas as pd  # type: ignore
import pytest
from scipy import sparse  # type: ignore

import scqc.utilities as ut

ut.set_processors_count(1)

# pylint: disable=missing-function-docstring


def _store(**kwargs: Any) -> ut.MatrixStore:
    counts = np.array([[1, 0, 3], [0, 0, 0], [4, 5, 6], [7, 0, 9]])
    return ut.MatrixStore(
        counts,
        gene_ids=["G1", "G2", "G3", "G4"],
        cell_ids=["C1", "C2", "C3"],
        **kwargs,
    )


def test_expand_doc() -> None:
    @ut.expand_doc(foo=7)
    def bar(baz: Any, vaz: int = 5) -> None:  # pylint: disable=disallowed-name,unused-argument
        """
        Bar with {foo} foos and parameter vaz (default: {vaz}).
        """

    assert bar.__doc__ == """
        Bar with 7 foos and parameter vaz (default: 5).
        """


def test_store_shape() -> None:
    store = _store(name="toy")
    assert store.shape == (4, 3)
    assert store.n_genes == 4
    assert store.n_cells == 3
    assert store.gene_ids == ["G1", "G2", "G3", "G4"]
    assert store.cell_ids == ["C1", "C2", "C3"]
    assert store.name == "toy"
    assert store.assay_names == ["counts"]
    assert np.allclose(ut.to_numpy_matrix(store.counts), [[1, 0, 3], [0, 0, 0], [4, 5, 6], [7, 0, 9]])
    assert ut.to_numpy_matrix(store.adata.X).shape == (3, 4)


def test_store_sparse_counts() -> None:
    dense = np.array([[1, 0, 3], [0, 0, 0], [4, 5, 6], [7, 0, 9]])
    store = ut.MatrixStore(sparse.csr_matrix(dense), gene_ids=["G1", "G2", "G3", "G4"], cell_ids=["C1", "C2", "C3"])
    assert store.shape == (4, 3)
    assert np.allclose(ut.to_numpy_matrix(store.counts), dense)


def test_store_dimension_mismatch() -> None:
    with pytest.raises(ut.DimensionMismatch):
        ut.MatrixStore(np.zeros((4, 3)), gene_ids=["G1", "G2", "G3"], cell_ids=["C1", "C2", "C3"])
    with pytest.raises(ut.DimensionMismatch):
        ut.MatrixStore(np.zeros((4, 3)), gene_ids=["G1", "G2", "G3", "G4"], cell_ids=["C1", "C2"])


def test_store_degenerate_input() -> None:
    with pytest.raises(ut.DegenerateInput):
        ut.MatrixStore(np.zeros((2, 2)), gene_ids=["G1", "G1"], cell_ids=["C1", "C2"])
    with pytest.raises(ut.DegenerateInput):
        ut.MatrixStore(np.array([[1, -1], [0, 0]]), gene_ids=["G1", "G2"], cell_ids=["C1", "C2"])


def test_store_metadata_alignment() -> None:
    cells = pd.DataFrame(dict(batch=["b3", "b1", "b2"]), index=["C3", "C1", "C2"])
    genes = pd.DataFrame(dict(symbol=["a", "b", "c", "d"]))
    store = _store(cells=cells, genes=genes)
    assert list(store.cells["batch"]) == ["b1", "b2", "b3"]
    assert list(store.genes.index) == ["G1", "G2", "G3", "G4"]
    assert list(store.genes["symbol"]) == ["a", "b", "c", "d"]

    with pytest.raises(ut.DimensionMismatch):
        _store(cells=pd.DataFrame(dict(batch=["b1", "b2"]), index=["C1", "C2"]))


def test_subset_is_order_preserving() -> None:
    store = _store(name="toy")
    subset = store.subset_cols(["C3", "C1"])
    assert subset.cell_ids == ["C1", "C3"]
    assert np.allclose(ut.to_numpy_matrix(subset.counts), [[1, 3], [0, 0], [4, 6], [7, 9]])

    again = subset.subset_cols(["C3", "C1"])
    assert again.cell_ids == subset.cell_ids
    assert np.allclose(ut.to_numpy_matrix(again.counts), ut.to_numpy_matrix(subset.counts))
    assert again.name == subset.name == "toy"
    assert again.gene_ids == store.gene_ids

    rows = store.subset_rows(np.array([True, False, True, True]))
    assert rows.gene_ids == ["G1", "G3", "G4"]
    assert store.shape == (4, 3)


def test_subset_keeps_metadata_and_assays() -> None:
    store = _store(cells=pd.DataFrame(dict(batch=["b1", "b2", "b3"])))
    store.add_assay("doubled", 2 * ut.to_numpy_matrix(store.counts))
    subset = store.subset_cols(["C2", "C3"]).subset_rows(["G3"])
    assert list(subset.cells["batch"]) == ["b2", "b3"]
    assert np.allclose(ut.to_numpy_matrix(subset.get_assay("doubled")), [[10, 12]])


def test_subset_unknown_ids() -> None:
    store = _store()
    with pytest.raises(ut.NotFound):
        store.subset_cols(["C1", "C9"])
    with pytest.raises(ut.NotFound):
        store.subset_rows(["G0"])


def test_assays() -> None:
    store = _store()
    store.add_assay("ones", np.ones((4, 3)))
    assert store.assay_names == ["counts", "ones"]
    assert np.allclose(ut.to_numpy_matrix(store.get_assay("ones")), 1)

    with pytest.raises(ut.DimensionMismatch):
        store.add_assay("bad", np.ones((3, 4)))
    with pytest.raises(ut.NotFound):
        store.get_assay("missing")
    with pytest.raises(ValueError):
        ut.set_vo_data(store, "counts", np.ones((3, 4)))


def test_annotations() -> None:
    store = _store()
    ut.set_o_data(store, "score", np.array([1.0, 2.0, 3.0]))
    assert np.allclose(ut.get_o_numpy(store, "score"), [1, 2, 3])
    assert list(ut.get_o_series(store, "score").index) == ["C1", "C2", "C3"]
    assert np.allclose(ut.get_o_numpy(store, "counts", sum=True), [12, 5, 18])
    assert np.allclose(ut.get_v_numpy(store, "counts", sum=True), [4, 0, 15, 16])
    assert ut.has_data(store, "score")
    assert not ut.has_data(store, "missing")

    with pytest.raises(ut.DimensionMismatch):
        ut.set_o_data(store, "bad", np.ones(4))
    with pytest.raises(ut.DimensionMismatch):
        ut.set_v_data(store, "bad", np.ones(3))
    with pytest.raises(ut.NotFound):
        ut.get_o_numpy(store, "missing")
    with pytest.raises(ut.NotFound):
        ut.get_m_data(store, "missing")


def test_slice_tracking() -> None:
    store = _store(name="full")
    sliced = ut.slice(
        store,
        name=".part",
        cells=np.array([False, True, True]),
        genes=np.array([True, False, True, False]),
        track_cells="full_cell_index",
        track_genes="full_gene_index",
    )
    assert sliced.name == "full.part"
    assert list(ut.get_o_numpy(sliced, "full_cell_index")) == [1, 2]
    assert list(ut.get_v_numpy(sliced, "full_gene_index")) == [0, 2]


def test_anndata_round_trip() -> None:
    store = _store(name="toy")
    adata = store.to_anndata()
    assert adata.shape == (3, 4)
    again = ut.MatrixStore.from_anndata(adata)
    assert again.name == "toy"
    assert again.shape == store.shape
    assert np.allclose(ut.to_numpy_matrix(again.counts), ut.to_numpy_matrix(store.counts))


def test_log_data() -> None:
    values = np.array([0.0, 1.0, 3.0])
    assert np.allclose(ut.log_data(values, base=2, normalization=1), [0, 1, 2])
    logged = ut.log_data(values)
    assert np.isnan(logged[0])
    assert np.allclose(logged[1:], np.log(values[1:]))


def test_sum_and_count_per() -> None:
    dense = np.array([[0, 1, 2], [3, 0, 0]], dtype="float")
    for matrix in (dense, sparse.csr_matrix(dense)):
        assert np.allclose(ut.sum_per(matrix, per="row"), [3, 3])
        assert np.allclose(ut.sum_per(matrix, per="column"), [3, 1, 2])
        assert np.allclose(ut.nnz_per(matrix, per="row"), [2, 1])
        assert np.allclose(ut.count_above_per(matrix, 1, per="row"), [1, 1])
        assert np.allclose(ut.mean_per(matrix, per="column"), [1.5, 0.5, 1])


def test_fraction_by() -> None:
    dense = np.array([[0, 1, 3], [0, 0, 0]], dtype="float")
    for matrix in (dense, sparse.csr_matrix(dense)):
        fractions = ut.to_numpy_matrix(ut.fraction_by(matrix, by="row"))
        assert np.allclose(fractions, [[0, 0.25, 0.75], [0, 0, 0]])


def test_median_and_mad() -> None:
    median, mad = ut.median_and_mad(np.array([10, 12, 14, 16, 18]), scale=1)
    assert median == 14
    assert mad == 2

    median, mad = ut.median_and_mad(np.array([1, 2, np.nan, np.inf, 3]))
    assert median == 2
    assert np.isclose(mad, 1.4826)

    median, mad = ut.median_and_mad(np.array([np.nan]))
    assert np.isnan(median)
    assert np.isnan(mad)

    with pytest.raises(ValueError):
        ut.median_and_mad(np.array([1, 2, 3]), scale=0)


def test_median_of_ratios() -> None:
    numerators = np.array([[2, 4, 6, 5], [1, 1, 3, 9]], dtype="float")
    denominator = np.array([1, 2, 3, 0], dtype="float")
    assert np.allclose(ut.median_of_ratios(numerators, denominator, per="row"), [2, 1])


def test_patterns_matches() -> None:
    strings = ["foo", "bar", "baz"]
    actual = ut.patterns_matches("ba?", strings)
    expected = np.array([False, True, True])
    assert np.allclose(actual, expected)

    assert list(ut.patterns_matches(["MT-.*"], ["mt-co1", "ACTB"])) == [True, False]


def test_compress_indices() -> None:
    assert list(ut.compress_indices(np.array([0, 3, 2]))) == [0, 2, 1]
    assert list(ut.compress_indices(np.array([0, -1, 2]))) == [0, -1, 1]


def test_parallel_map() -> None:
    @ut.timed_call("invocation")
    def invocation(index: int) -> int:
        return index

    actual = list(ut.parallel_map(invocation, 100))
    expected = list(range(100))
    assert actual == expected


def test_sum_groups() -> None:
    expected_sums = np.array([[5, 7, 2], [10, 8, 13]])
    expected_sizes = np.array([2, 2])
    groups = np.array([0, 1, 0, 1])

    dense_rows = np.array([[0, 1, 2], [3, 0, 4], [5, 6, 0], [7, 8, 9]], dtype="float")

    results = ut.sum_groups(dense_rows, groups, per="row")
    assert results is not None
    assert np.allclose(ut.to_numpy_matrix(results[0]), expected_sums)
    assert np.allclose(results[1], expected_sizes)

    results = ut.sum_groups(dense_rows.transpose(), groups, per="column")
    assert results is not None
    assert np.allclose(ut.to_numpy_matrix(results[0]), expected_sums.transpose())
    assert np.allclose(results[1], expected_sizes)

    sparse_rows = sparse.csr_matrix(dense_rows)

    results = ut.sum_groups(sparse_rows, groups, per="row")
    assert results is not None
    assert np.allclose(ut.to_numpy_matrix(results[0]), expected_sums)
    assert np.allclose(results[1], expected_sizes)


def test_knn_edge_weights() -> None:
    points = np.array([[0.0], [1.0], [3.0], [6.0]])
    edge_weights = ut.knn_edge_weights(points, k=1)
    dense = edge_weights.toarray()
    assert np.allclose(dense, dense.T)
    assert np.allclose(np.diag(dense), 0)
    assert np.isclose(dense[0, 1], 0.5)
    assert np.isclose(dense[2, 1], 1 / 3)
    assert np.isclose(dense[3, 2], 0.25)
    assert dense[0, 3] == 0


def test_leiden_partition() -> None:
    generator = np.random.default_rng(123456)
    points = np.concatenate([generator.normal(0, 1, (10, 2)), generator.normal(100, 1, (10, 2))])
    edge_weights = ut.knn_edge_weights(points, k=5)
    groups = ut.leiden_partition(edge_weights=edge_weights, random_seed=123456)
    assert len(groups) == 20
    assert np.min(groups) == 0
    assert len(set(groups[:10]) & set(groups[10:])) == 0
