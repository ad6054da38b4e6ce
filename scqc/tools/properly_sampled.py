"""
Properly Sampled
----------------
"""

from typing import Mapping
from typing import Optional

import numpy as np

import scqc.parameters as pr
import scqc.utilities as ut
from scqc.tools.metrics import subset_metric

__all__ = [
    "find_properly_sampled_cells",
    "find_properly_sampled_genes",
]


@ut.logged()
@ut.timed_call()
@ut.expand_doc()
def find_properly_sampled_cells(
    store: ut.MatrixStore,
    what: str = "counts",
    *,
    min_cell_total: Optional[float] = None,
    max_cell_total: Optional[float] = None,
    min_cell_detected: Optional[int] = None,
    max_subset_percents: Optional[Mapping[str, float]] = None,
    inplace: bool = True,
) -> Optional[ut.PandasSeries]:
    """
    Detect cells with a "proper" amount of ``what`` (default: {what}) data, using fixed thresholds.

    This complements the adaptive :py:func:`scqc.tools.outliers.find_mad_outliers`, for the cases
    where the thresholds are known in advance (e.g., from a previous run on similar data).

    **Input**

    A :py:class:`scqc.utilities.annotation.MatrixStore`. If ``max_subset_percents`` is specified,
    the store must contain the ``subset_<name>_percent`` metrics (see
    :py:func:`scqc.tools.metrics.compute_cell_metrics`).

    **Returns**

    Cell Annotations
        ``properly_sampled_cell``
            A boolean mask indicating whether each cell has a "proper" amount of data.

    If ``inplace`` (default: {inplace}), this is written to the store, and the function returns
    ``None``. Otherwise this is returned as a pandas series (indexed by the cell identifiers).

    **Computation Parameters**

    1. Exclude all cells whose total data is less than the ``min_cell_total`` (default:
       {min_cell_total}), unless it is ``None``.

    2. Exclude all cells whose total data is more than the ``max_cell_total`` (default:
       {max_cell_total}), unless it is ``None``.

    3. Exclude all cells with less than ``min_cell_detected`` (default: {min_cell_detected}) genes
       with a positive count, unless it is ``None``.

    4. For each subset name in ``max_subset_percents`` (default: {max_subset_percents}), exclude all
       the cells whose percent of data in the subset genes is more than the specified maximum.
    """
    total_per_cell = ut.get_o_numpy(store, what, sum=True)

    cells_mask = np.full(store.n_cells, True, dtype="bool")

    if min_cell_total is not None:
        cells_mask = cells_mask & (total_per_cell >= min_cell_total)

    if max_cell_total is not None:
        cells_mask = cells_mask & (total_per_cell <= max_cell_total)

    if min_cell_detected is not None:
        detected_per_cell = ut.nnz_per(ut.get_vo_proper(store, what, layout="row_major"), per="row")
        cells_mask = cells_mask & (detected_per_cell >= min_cell_detected)

    for subset, max_percent in (max_subset_percents or {}).items():
        percent_per_cell = ut.get_o_numpy(store, subset_metric(subset, "percent"), formatter=ut.sizes_description)
        cells_mask = cells_mask & (percent_per_cell <= max_percent)

    if inplace:
        ut.set_o_data(store, "properly_sampled_cell", cells_mask)
        return None

    ut.log_return("properly_sampled_cell", cells_mask)
    return ut.to_pandas_series(cells_mask, index=store.cell_ids)


@ut.logged()
@ut.timed_call()
@ut.expand_doc()
def find_properly_sampled_genes(
    store: ut.MatrixStore,
    what: str = "counts",
    *,
    min_cells: int = pr.properly_sampled_min_cells,
    detection_limit: float = pr.properly_sampled_detection_limit,
    inplace: bool = True,
) -> Optional[ut.PandasSeries]:
    """
    Detect genes with a "proper" amount of ``what`` (default: {what}) data.

    It doesn't make sense to analyze genes that have zero (or almost zero) expression in all the
    cells, so the retention rule keeps a gene only if it is detected in enough cells.

    **Input**

    A :py:class:`scqc.utilities.annotation.MatrixStore`.

    **Returns**

    Gene Annotations
        ``detected_cells``
            The number of cells in which the count of each gene is above the detection limit.

        ``properly_sampled_gene``
            A boolean mask indicating whether each gene has a "proper" amount of data.

        ``discard``
            The inverse of ``properly_sampled_gene``.

    If ``inplace`` (default: {inplace}), these are written to the store and the function returns
    ``None``. Otherwise the ``properly_sampled_gene`` mask is returned as a pandas series (indexed
    by the gene identifiers).

    **Computation Parameters**

    1. Count, for each gene, the number of cells whose count is strictly above the
       ``detection_limit`` (default: {detection_limit}).

    2. Keep all genes where this number is at least ``min_cells`` (default: {min_cells}).
    """
    if min_cells < 0 or detection_limit < 0:
        raise ValueError(f"invalid retention rule: min_cells: {min_cells} detection_limit: {detection_limit}")

    counts = ut.get_vo_proper(store, what, layout="column_major")
    detected_cells = ut.count_above_per(counts, detection_limit, per="column")
    genes_mask = detected_cells >= min_cells

    if inplace:
        ut.set_v_data(store, "detected_cells", detected_cells, formatter=ut.sizes_description)
        ut.set_v_data(store, "properly_sampled_gene", genes_mask)
        ut.set_v_data(store, "discard", ~genes_mask)
        return None

    ut.log_return("properly_sampled_gene", genes_mask)
    return ut.to_pandas_series(genes_mask, index=store.gene_ids)
