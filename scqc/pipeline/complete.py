"""
Complete
--------

The complete QC pipeline, from the raw counts to the clean normalized data.

This can be configured by tweaking the parameters, but for any deeper customization (adding and/or
removing steps) just provide your own pipeline instead. You can use the implementation here as a
starting point.
"""

from contextlib import contextmanager
from typing import Collection
from typing import Dict
from typing import Iterator
from typing import Mapping
from typing import NamedTuple
from typing import Optional
from typing import Union

import scqc.parameters as pr
import scqc.tools as tl
import scqc.utilities as ut

from .clean import analyze_clean_cells
from .clean import analyze_clean_genes
from .clean import extract_clean_data
from .normalize import normalize_clean_data

__all__ = [
    "QcResult",
    "run_qc_pipeline",
]


class QcResult(NamedTuple):
    """
    The results of :py:func:`run_qc_pipeline`.
    """

    #: The full store, annotated with the QC metrics and the ``discard`` masks.
    full: ut.MatrixStore

    #: The clean store (just the kept cells and genes) with the size factors and the log assays.
    clean: ut.MatrixStore

    #: The thresholds used for each of the outlier metrics.
    thresholds: Dict[str, tl.OutlierThresholds]


@contextmanager
def _stage(name: str) -> Iterator[None]:
    try:
        with ut.timed_step(name):
            yield
    except ut.DegenerateGroup as error:
        raise ut.DegenerateGroup(f"{name}: {error}", group=error.group) from error
    except ut.ScqcError as error:
        raise type(error)(f"{name}: {error}") from error


@ut.logged()
@ut.timed_call()
@ut.expand_doc()
def run_qc_pipeline(  # pylint: disable=too-many-locals
    store: ut.MatrixStore,
    what: str = "counts",
    *,
    subsets: Optional[Collection[tl.GeneSubset]] = None,
    name_property: Optional[str] = None,
    properly_sampled_min_cells: int = pr.properly_sampled_min_cells,
    properly_sampled_detection_limit: float = pr.properly_sampled_detection_limit,
    outliers_nmads: float = pr.outliers_nmads,
    sum_outliers_log: bool = pr.sum_outliers_log,
    detected_outliers_log: bool = pr.detected_outliers_log,
    properly_sampled_min_cell_total: Optional[float] = None,
    properly_sampled_max_cell_total: Optional[float] = None,
    properly_sampled_min_cell_detected: Optional[int] = None,
    properly_sampled_max_subset_percents: Optional[Mapping[str, float]] = None,
    clustering: Union[tl.ClusteringStrategy, str, None] = None,
    min_group_size: int = pr.min_group_size,
    pool_sizes: Collection[int] = pr.pool_sizes,
    deconvolution_cell_weight: float = pr.deconvolution_cell_weight,
    deconvolution_tolerance: float = pr.deconvolution_tolerance,
    deconvolution_max_iterations: int = pr.deconvolution_max_iterations,
    size_factors_center: str = pr.size_factors_center,
    log_base: float = pr.log_base,
    log_normalization: float = pr.log_normalization,
    cpm_scale: float = pr.cpm_scale,
    name: Optional[str] = ".clean",
) -> QcResult:
    """
    Run the complete QC pipeline on the raw ``what`` (default: {what}) data of the ``store``.

    **Input**

    A :py:class:`scqc.utilities.annotation.MatrixStore` containing the raw counts.

    **Returns**

    A :py:class:`QcResult` containing the full ``store`` (annotated in place with the QC metrics,
    the outlier masks and the ``discard`` masks), the clean store (named ``name``, default: {name})
    with the size factors and the log assays, and the outlier thresholds.

    Errors raised by any of the stages are re-raised with the same type, with the name of the stage
    prefixed to the message. If no cells (or no genes) survive the QC, this raises
    :py:class:`scqc.utilities.errors.DegenerateInput`.

    **Computation Parameters**

    1. Invoke :py:func:`scqc.pipeline.clean.analyze_clean_genes` using
       ``properly_sampled_min_cells`` (default: {properly_sampled_min_cells}) and
       ``properly_sampled_detection_limit`` (default: {properly_sampled_detection_limit}).

    2. Invoke :py:func:`scqc.pipeline.clean.analyze_clean_cells` using the ``subsets``, the
       ``name_property`` (default: {name_property}), ``outliers_nmads`` (default:
       {outliers_nmads}), ``sum_outliers_log`` (default: {sum_outliers_log}),
       ``detected_outliers_log`` (default: {detected_outliers_log}) and the optional fixed
       ``properly_sampled_...`` thresholds.

    3. Invoke :py:func:`scqc.pipeline.clean.extract_clean_data`.

    4. Invoke :py:func:`scqc.pipeline.normalize.normalize_clean_data` on the clean data, using the
       ``clustering`` (default: {clustering}), ``min_group_size`` (default: {min_group_size}),
       ``pool_sizes`` (default: {pool_sizes}), ``size_factors_center`` (default:
       {size_factors_center}), ``log_base`` (default: {log_base}) and the rest of the
       normalization parameters.
    """
    with _stage("analyze_clean_genes"):
        analyze_clean_genes(
            store,
            what,
            properly_sampled_min_cells=properly_sampled_min_cells,
            properly_sampled_detection_limit=properly_sampled_detection_limit,
        )

    with _stage("analyze_clean_cells"):
        analyze_clean_cells(
            store,
            what,
            subsets=subsets,
            name_property=name_property,
            outliers_nmads=outliers_nmads,
            sum_outliers_log=sum_outliers_log,
            detected_outliers_log=detected_outliers_log,
            properly_sampled_min_cell_total=properly_sampled_min_cell_total,
            properly_sampled_max_cell_total=properly_sampled_max_cell_total,
            properly_sampled_min_cell_detected=properly_sampled_min_cell_detected,
            properly_sampled_max_subset_percents=properly_sampled_max_subset_percents,
        )

    with _stage("extract_clean_data"):
        clean = extract_clean_data(store, name=name)
        if clean is None:
            raise ut.DegenerateInput(
                f"no cells and/or genes survived the QC of the store: {store.name or 'unnamed'}"
            )

    if ut.logging_calc():
        ut.log_calc(f"kept {clean.n_cells} out of {store.n_cells} cells")
        ut.log_calc(f"kept {clean.n_genes} out of {store.n_genes} genes")

    with _stage("normalize_clean_data"):
        normalize_clean_data(
            clean,
            what,
            clustering=clustering,
            min_group_size=min_group_size,
            pool_sizes=pool_sizes,
            deconvolution_cell_weight=deconvolution_cell_weight,
            deconvolution_tolerance=deconvolution_tolerance,
            deconvolution_max_iterations=deconvolution_max_iterations,
            size_factors_center=size_factors_center,
            log_base=log_base,
            log_normalization=log_normalization,
            cpm_scale=cpm_scale,
        )

    return QcResult(full=store, clean=clean, thresholds=tl.get_outlier_thresholds(store))
