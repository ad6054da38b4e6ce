"""
Clean
-----

Raw single-cell RNA sequencing data is notoriously noisy and "dirty". The pipeline steps here
perform the initial analysis of the data and extract just the "clean" data for normalization. The
steps provided here are expected to be generically useful, but as always specific data sets may
require custom cleaning steps on a case-by-case basis.
"""

from re import Pattern
from typing import Collection
from typing import List
from typing import Mapping
from typing import Optional
from typing import Union

import scqc.parameters as pr
import scqc.tools as tl
import scqc.utilities as ut

__all__ = [
    "analyze_clean_genes",
    "find_qc_subsets",
    "analyze_clean_cells",
    "pick_clean_cells",
    "extract_clean_data",
]


@ut.logged()
@ut.timed_call()
@ut.expand_doc()
def analyze_clean_genes(
    store: ut.MatrixStore,
    what: str = "counts",
    *,
    properly_sampled_min_cells: int = pr.properly_sampled_min_cells,
    properly_sampled_detection_limit: float = pr.properly_sampled_detection_limit,
) -> None:
    """
    Analyze genes in preparation for extracting the "clean" subset of the ``store``.

    **Input**

    A :py:class:`scqc.utilities.annotation.MatrixStore`.

    **Returns**

    Sets the following in the store:

    Gene Annotations
        ``mean``, ``detected_rate``
            The QC metrics of each gene.

        ``detected_cells``, ``properly_sampled_gene``, ``discard``
            The results of the gene retention rule.

    **Computation Parameters**

    1. Invoke :py:func:`scqc.tools.metrics.compute_gene_metrics`.

    2. Invoke :py:func:`scqc.tools.properly_sampled.find_properly_sampled_genes` using
       ``properly_sampled_min_cells`` (default: {properly_sampled_min_cells}) and
       ``properly_sampled_detection_limit`` (default: {properly_sampled_detection_limit}).
    """
    tl.compute_gene_metrics(store, what=what)
    tl.find_properly_sampled_genes(
        store,
        what,
        min_cells=properly_sampled_min_cells,
        detection_limit=properly_sampled_detection_limit,
    )


@ut.timed_call()
@ut.expand_doc()
def find_qc_subsets(
    store: ut.MatrixStore,
    *,
    name_property: Optional[str] = None,
    mitochondrial_gene_patterns: Collection[Union[str, Pattern]] = pr.mitochondrial_gene_patterns,
    spike_in_gene_patterns: Collection[Union[str, Pattern]] = pr.spike_in_gene_patterns,
) -> List[tl.GeneSubset]:
    """
    Return the default gene subsets used for computing the cells QC metrics: the ``mito`` genes
    matching the ``mitochondrial_gene_patterns`` (default: {mitochondrial_gene_patterns}) and the
    ``spike`` genes matching the ``spike_in_gene_patterns`` (default: {spike_in_gene_patterns}).

    The names of the genes are taken from the ``name_property`` (default: {name_property}), if
    specified, or the gene identifiers. Empty subsets are omitted.
    """
    subsets: List[tl.GeneSubset] = []
    for subset_name, patterns in (("mito", mitochondrial_gene_patterns), ("spike", spike_in_gene_patterns)):
        if len(patterns) == 0:
            continue
        subset = tl.find_named_genes(store, subset=subset_name, name_property=name_property, patterns=patterns)
        assert isinstance(subset, tl.GeneSubset)
        if len(subset.gene_ids) > 0:
            subsets.append(subset)
    return subsets


@ut.logged()
@ut.timed_call()
@ut.expand_doc()
def analyze_clean_cells(
    store: ut.MatrixStore,
    what: str = "counts",
    *,
    subsets: Optional[Collection[tl.GeneSubset]] = None,
    name_property: Optional[str] = None,
    outliers_nmads: float = pr.outliers_nmads,
    sum_outliers_log: bool = pr.sum_outliers_log,
    detected_outliers_log: bool = pr.detected_outliers_log,
    properly_sampled_min_cell_total: Optional[float] = None,
    properly_sampled_max_cell_total: Optional[float] = None,
    properly_sampled_min_cell_detected: Optional[int] = None,
    properly_sampled_max_subset_percents: Optional[Mapping[str, float]] = None,
) -> None:
    """
    Analyze cells in preparation for extracting the "clean" subset of the ``store``.

    **Input**

    A :py:class:`scqc.utilities.annotation.MatrixStore`.

    **Returns**

    Sets the following in the store:

    Cell Annotations
        ``sum``, ``detected``, ``subset_<name>_sum``, ``subset_<name>_detected``, ``subset_<name>_percent``
            The QC metrics of each cell.

        ``<metric>_outlier``
            A mask of the outlier cells of each metric.

        ``properly_sampled_cell``
            A mask of the cells passing the fixed thresholds (only if any were specified).

        ``discard``
            A mask of the cells to discard.

    Audit Data
        ``outlier_thresholds``
            The thresholds used for each metric.

    **Computation Parameters**

    1. If ``subsets`` is ``None``, use :py:func:`find_qc_subsets` with the ``name_property``
       (default: {name_property}) to compute the default subsets.

    2. Invoke :py:func:`scqc.tools.metrics.compute_cell_metrics` for the ``subsets``.

    3. Invoke :py:func:`scqc.tools.outliers.find_mad_outliers` using ``outliers_nmads`` (default:
       {outliers_nmads}), to find the ``lower`` outliers of the ``sum`` (log: {sum_outliers_log})
       and of the ``detected`` (log: {detected_outliers_log}), and the ``upper`` outliers of the
       percent of each of the subsets.

    4. If any of the ``properly_sampled_min_cell_total`` (default:
       {properly_sampled_min_cell_total}), ``properly_sampled_max_cell_total`` (default:
       {properly_sampled_max_cell_total}), ``properly_sampled_min_cell_detected`` (default:
       {properly_sampled_min_cell_detected}) or ``properly_sampled_max_subset_percents`` (default:
       {properly_sampled_max_subset_percents}) is specified, invoke
       :py:func:`scqc.tools.properly_sampled.find_properly_sampled_cells`.

    5. Invoke :py:func:`pick_clean_cells` to combine all the masks into the ``discard`` mask.
    """
    if subsets is None:
        subsets = find_qc_subsets(store, name_property=name_property)

    tl.compute_cell_metrics(store, subsets, what=what)

    masks = ["sum_outlier", "detected_outlier"]
    tl.find_mad_outliers(store, "sum", direction="lower", log=sum_outliers_log, nmads=outliers_nmads)
    tl.find_mad_outliers(store, "detected", direction="lower", log=detected_outliers_log, nmads=outliers_nmads)
    for subset in subsets:
        metric = tl.subset_metric(subset.name, "percent")
        tl.find_mad_outliers(store, metric, direction="upper", log=False, nmads=outliers_nmads)
        masks.append(f"{metric}_outlier")

    if (
        properly_sampled_min_cell_total is not None
        or properly_sampled_max_cell_total is not None
        or properly_sampled_min_cell_detected is not None
        or properly_sampled_max_subset_percents is not None
    ):
        tl.find_properly_sampled_cells(
            store,
            what,
            min_cell_total=properly_sampled_min_cell_total,
            max_cell_total=properly_sampled_max_cell_total,
            min_cell_detected=properly_sampled_min_cell_detected,
            max_subset_percents=properly_sampled_max_subset_percents,
        )
        masks.append("~properly_sampled_cell")

    pick_clean_cells(store, masks=masks)


@ut.timed_call()
@ut.expand_doc()
def pick_clean_cells(
    store: ut.MatrixStore,
    *,
    masks: Collection[str],
    to: str = "discard",
) -> None:
    """
    Create a mask of the cells to discard.

    **Input**

    A :py:class:`scqc.utilities.annotation.MatrixStore`.

    **Returns**

    Sets the following in the store:

    Cell Annotations
        ``to`` (default: {to})
            A mask of the cells to discard, which are the cells flagged by any of the ``masks``.

    **Computation Parameters**

    1. This simply OR-s the specified ``masks`` using :py:func:`scqc.tools.mask.combine_masks`.
    """
    tl.combine_masks(store, masks, to=to)


@ut.logged()
@ut.timed_call()
@ut.expand_doc()
def extract_clean_data(
    store: ut.MatrixStore,
    cells_mask: str = "discard",
    genes_mask: str = "discard",
    *,
    name: Optional[str] = ".clean",
    top_level: bool = True,
) -> Optional[ut.MatrixStore]:
    """
    Extract a "clean" subset of the ``store`` to normalize.

    **Input**

    A :py:class:`scqc.utilities.annotation.MatrixStore`.

    **Returns**

    A new store containing the "clean" subset of the original data. By default, the ``name`` of
    this data is {name}. If this starts with a ``.``, this will be appended to the current name of
    the data (if any). If no cells or no genes remain, returns ``None``.

    The returned store will have ``full_cell_index`` and ``full_gene_index`` per-cell and per-gene
    annotations to allow mapping the results back to the original data.

    **Computation Parameters**

    1. This simply invokes :py:func:`scqc.tools.filter.filter_data` to slice just the cells which are
       not in the ``cells_mask`` (default: {cells_mask}) and the genes which are not in the
       ``genes_mask`` (default: {genes_mask}), tracking the original ``full_cell_index`` and
       ``full_gene_index``.
    """
    results = tl.filter_data(
        store,
        [f"~{cells_mask}"],
        [f"~{genes_mask}"],
        name=name,
        top_level=top_level,
        track_cells="full_cell_index",
        track_genes="full_gene_index",
    )
    if results is None:
        return None

    return results[0]
