"""
Metrics
-------

Per-cell and per-gene summary statistics used to decide which cells and genes are of sufficient
quality for further analysis.

The names of the computed metrics are a fixed set. Per cell, we compute the total ``sum`` of the
counts and the number of ``detected`` genes (genes with a positive count). For each
:py:class:`scqc.tools.named.GeneSubset` (e.g. ``mito``), we also compute ``subset_mito_sum``,
``subset_mito_detected`` and ``subset_mito_percent``. Per gene, we compute the ``mean`` count and
the ``detected_rate``, which is the **fraction** (not percent) of the cells the gene was detected
in.
"""

from typing import Collection
from typing import Dict
from typing import NamedTuple
from typing import Optional

import numpy as np

import scqc.utilities as ut
from scqc.tools.named import GeneSubset

__all__ = [
    "CELL_METRICS",
    "GENE_METRICS",
    "SUBSET_METRICS",
    "subset_metric",
    "CellMetrics",
    "GeneMetrics",
    "compute_cell_metrics",
    "compute_gene_metrics",
    "get_cell_metrics",
    "get_gene_metrics",
]

#: The names of the basic per-cell metrics.
CELL_METRICS = ("sum", "detected")

#: The names of the per-gene metrics.
GENE_METRICS = ("mean", "detected_rate")

#: The names of the per-cell metrics computed for each gene subset.
SUBSET_METRICS = ("sum", "detected", "percent")


def subset_metric(subset: str, metric: str) -> str:
    """
    Return the name of the per-cell ``metric`` (one of :py:const:`SUBSET_METRICS`) of the genes
    ``subset``.
    """
    assert metric in SUBSET_METRICS
    return f"subset_{subset}_{metric}"


class CellMetrics(NamedTuple):
    """
    The QC metrics of each cell.
    """

    #: The total count of each cell (the library size).
    sum: ut.NumpyVector

    #: The number of genes with a positive count in each cell.
    detected: ut.NumpyVector

    #: For each subset name, the total count of the subset genes in each cell.
    subset_sums: Dict[str, ut.NumpyVector]

    #: For each subset name, the number of subset genes with a positive count in each cell.
    subset_detected: Dict[str, ut.NumpyVector]

    #: For each subset name, the percent of the total count of each cell in the subset genes.
    subset_percents: Dict[str, ut.NumpyVector]

    def columns(self) -> Dict[str, ut.NumpyVector]:
        """
        Return the metrics by their names, in a stable order.
        """
        columns = dict(sum=self.sum, detected=self.detected)
        for subset in self.subset_sums:
            columns[subset_metric(subset, "sum")] = self.subset_sums[subset]
            columns[subset_metric(subset, "detected")] = self.subset_detected[subset]
            columns[subset_metric(subset, "percent")] = self.subset_percents[subset]
        return columns

    def to_frame(self, index: Collection[str]) -> ut.PandasFrame:
        """
        Return the metrics as a data frame, indexed by the cell identifiers.
        """
        return ut.PandasFrame(self.columns(), index=index)


class GeneMetrics(NamedTuple):
    """
    The QC metrics of each gene.
    """

    #: The mean count of each gene across all the cells.
    mean: ut.NumpyVector

    #: The fraction of the cells with a positive count of each gene.
    detected_rate: ut.NumpyVector

    def columns(self) -> Dict[str, ut.NumpyVector]:
        """
        Return the metrics by their names, in a stable order.
        """
        return dict(mean=self.mean, detected_rate=self.detected_rate)

    def to_frame(self, index: Collection[str]) -> ut.PandasFrame:
        """
        Return the metrics as a data frame, indexed by the gene identifiers.
        """
        return ut.PandasFrame(self.columns(), index=index)


@ut.logged()
@ut.timed_call()
@ut.expand_doc()
def compute_cell_metrics(
    store: ut.MatrixStore,
    subsets: Collection[GeneSubset] = (),
    *,
    what: str = "counts",
    inplace: bool = True,
) -> Optional[ut.PandasFrame]:
    """
    Compute the QC metrics of each cell of the ``what`` (default: {what}) assay.

    **Input**

    A :py:class:`scqc.utilities.annotation.MatrixStore`, and optional ``subsets`` of genes (see
    :py:func:`scqc.tools.named.find_named_genes`).

    **Returns**

    Cell Annotations
        ``sum``
            The total count of each cell.

        ``detected``
            The number of genes with a positive count in each cell.

        ``subset_<name>_sum``, ``subset_<name>_detected``, ``subset_<name>_percent``
            The same for the genes of each of the ``subsets``, where the percent is ``100`` times the
            subset sum divided by the total sum, or ``0`` if the total sum is zero.

    If ``inplace`` (default: {inplace}), these are written to the store (together with the list of
    the metric names for :py:func:`get_cell_metrics`), and the function returns ``None``.
    Otherwise, they are returned as a pandas data frame (indexed by the cell identifiers).

    The count matrix is never modified. A subset containing identifiers missing from the store
    raises :py:class:`scqc.utilities.errors.NotFound`.
    """
    subset_names = [subset.name for subset in subsets]
    if len(set(subset_names)) != len(subset_names):
        raise ValueError(f"duplicate gene subset names: {', '.join(subset_names)}")

    counts = ut.get_vo_proper(store, what, layout="row_major")

    sums = ut.sum_per(counts, per="row").astype("float64")
    detected = ut.nnz_per(counts, per="row")
    if ut.logging_calc():
        ut.log_calc("sum", sums, formatter=ut.sizes_description)
        ut.log_calc("detected", detected, formatter=ut.sizes_description)

    gene_ids = ut.to_pandas_series(np.arange(store.n_genes), index=store.gene_ids)
    has_counts = sums > 0

    subset_sums: Dict[str, ut.NumpyVector] = {}
    subset_detected: Dict[str, ut.NumpyVector] = {}
    subset_percents: Dict[str, ut.NumpyVector] = {}
    for subset in subsets:
        missing = [gene_id for gene_id in subset.gene_ids if gene_id not in gene_ids.index]
        if len(missing) > 0:
            raise ut.NotFound(
                f"the gene subset: {subset.name} refers to genes missing from the store: "
                f"{store.name or 'unnamed'}: {ut.describe_names(missing)}"
            )

        genes_mask = np.zeros(store.n_genes, dtype="bool")
        genes_mask[gene_ids[list(subset.gene_ids)].values] = True
        subset_counts = counts[:, genes_mask]

        subset_sum = ut.sum_per(subset_counts, per="row").astype("float64")
        subset_percent = np.zeros(store.n_cells, dtype="float64")
        subset_percent[has_counts] = 100.0 * subset_sum[has_counts] / sums[has_counts]

        subset_sums[subset.name] = subset_sum
        subset_detected[subset.name] = ut.nnz_per(subset_counts, per="row")
        subset_percents[subset.name] = subset_percent

        if ut.logging_calc():
            ut.log_calc(f"{subset.name} genes", genes_mask)

    metrics = CellMetrics(
        sum=sums,
        detected=detected,
        subset_sums=subset_sums,
        subset_detected=subset_detected,
        subset_percents=subset_percents,
    )

    if not inplace:
        frame = metrics.to_frame(store.cell_ids)
        ut.log_return("cell_metrics", frame)
        return frame

    for name, values in metrics.columns().items():
        ut.set_o_data(store, name, values, formatter=ut.sizes_description)
    ut.set_m_data(store, "cell_metrics", list(metrics.columns().keys()))
    return None


@ut.logged()
@ut.timed_call()
@ut.expand_doc()
def compute_gene_metrics(
    store: ut.MatrixStore,
    *,
    what: str = "counts",
    inplace: bool = True,
) -> Optional[ut.PandasFrame]:
    """
    Compute the QC metrics of each gene of the ``what`` (default: {what}) assay.

    **Input**

    A :py:class:`scqc.utilities.annotation.MatrixStore`.

    **Returns**

    Gene Annotations
        ``mean``
            The mean count of each gene across all the cells.

        ``detected_rate``
            The fraction (between zero and one) of the cells with a positive count of each gene.

    If ``inplace`` (default: {inplace}), these are written to the store, and the function returns
    ``None``. Otherwise, they are returned as a pandas data frame (indexed by the gene identifiers).

    A store without any cells raises :py:class:`scqc.utilities.errors.DegenerateInput`.
    """
    if store.n_cells == 0:
        raise ut.DegenerateInput(f"no cells to compute gene metrics for in the store: {store.name or 'unnamed'}")

    counts = ut.get_vo_proper(store, what, layout="column_major")
    metrics = GeneMetrics(
        mean=ut.mean_per(counts, per="column"),
        detected_rate=ut.nnz_per(counts, per="column") / store.n_cells,
    )

    if not inplace:
        frame = metrics.to_frame(store.gene_ids)
        ut.log_return("gene_metrics", frame)
        return frame

    ut.set_v_data(store, "mean", metrics.mean, formatter=ut.sizes_description)
    ut.set_v_data(store, "detected_rate", metrics.detected_rate, formatter=ut.fractions_description)
    ut.set_m_data(store, "gene_metrics", list(GENE_METRICS))
    return None


@ut.timed_call()
def get_cell_metrics(store: ut.MatrixStore) -> ut.PandasFrame:
    """
    Return the per-cell QC table (the metrics computed by :py:func:`compute_cell_metrics`, and any
    outlier flags, ``discard`` mask and size factors computed for them), indexed by the cell
    identifiers.

    Raises :py:class:`scqc.utilities.errors.NotFound` if the cell metrics were not computed.
    """
    metrics = list(ut.get_m_data(store, "cell_metrics"))
    flags = [f"{metric}_outlier" for metric in metrics] + [
        "discard",
        "size_factor",
        "size_factor_group",
        "size_factor_fallback",
    ]
    columns = metrics + [flag for flag in flags if flag in store.adata.obs]
    return ut.PandasFrame(
        {column: ut.get_o_numpy(store, column) for column in columns},
        index=store.cell_ids,
    )


@ut.timed_call()
def get_gene_metrics(store: ut.MatrixStore) -> ut.PandasFrame:
    """
    Return the per-gene QC table (the metrics computed by :py:func:`compute_gene_metrics`, and the
    ``detected_cells``, ``properly_sampled_gene`` and ``discard`` data, if computed), indexed by the
    gene identifiers.

    Raises :py:class:`scqc.utilities.errors.NotFound` if the gene metrics were not computed.
    """
    metrics = list(ut.get_m_data(store, "gene_metrics"))
    flags = ["detected_cells", "properly_sampled_gene", "discard"]
    columns = metrics + [flag for flag in flags if flag in store.adata.var]
    return ut.PandasFrame(
        {column: ut.get_v_numpy(store, column) for column in columns},
        index=store.gene_ids,
    )
