"""
Outliers
--------

Detect outlier cells using robust, distribution-adaptive thresholds, based on the median and the
median absolute deviation (MAD) of some per-cell QC metric, rather than on fixed thresholds that
need to be tuned for each data set.
"""

from typing import Dict
from typing import NamedTuple
from typing import Optional
from typing import Tuple

import numpy as np

import scqc.parameters as pr
import scqc.utilities as ut

__all__ = [
    "DIRECTIONS",
    "OutlierThresholds",
    "compute_mad_outliers",
    "find_mad_outliers",
    "get_outlier_thresholds",
]

#: The valid outlier directions.
DIRECTIONS = ("lower", "upper", "both")


class OutlierThresholds(NamedTuple):
    """
    The thresholds used to detect the outliers of some metric.

    The ``median`` and ``mad`` are of the values the detection was computed on, that is, they are of
    the (natural) log of the metric if ``log`` is set. The ``lower`` and ``upper`` thresholds are
    always in the original scale of the metric. Both are reported regardless of the ``direction``,
    which determines which of them was actually applied.
    """

    #: The name of the metric.
    metric: str

    #: Which of the thresholds were applied (``lower``, ``upper`` or ``both``).
    direction: str

    #: Whether the thresholds were computed on the log of the metric.
    log: bool

    #: The number of scaled MADs from the median.
    nmads: float

    #: The median of the (possibly logged) metric.
    median: float

    #: The scaled MAD of the (possibly logged) metric.
    mad: float

    #: The lower threshold, in the original scale.
    lower: float

    #: The upper threshold, in the original scale.
    upper: float


@ut.timed_call()
@ut.expand_doc()
def compute_mad_outliers(
    values: ut.Vector,
    *,
    metric: str = "metric",
    direction: str = pr.outliers_direction,
    log: bool = pr.outliers_log,
    nmads: float = pr.outliers_nmads,
    mad_scale: float = pr.outliers_mad_scale,
) -> Tuple[ut.NumpyVector, OutlierThresholds]:
    """
    Compute the outliers mask of some ``values`` of a ``metric`` (default: {metric}).

    Returns the boolean outliers mask and the :py:class:`OutlierThresholds` used to compute it.

    **Computation Parameters**

    1. If ``log`` (default: {log}), compute the natural log of the values. Values which are not
       positive can't be logged, and are treated as negative infinity.

    2. Compute the median of the finite values, and their median absolute deviation, multiplied by
       ``mad_scale`` (default: {mad_scale}). ``NaN`` and infinite values do not participate in this
       estimate. If no finite value remains, raise :py:class:`scqc.utilities.errors.DegenerateInput`.

    3. Compute the lower and upper thresholds, ``nmads`` (default: {nmads}) scaled MADs below and
       above the median.

    4. Depending on the ``direction`` (default: {direction}), flag the values which are strictly
       below the lower threshold and/or strictly above the upper threshold. A value exactly at a
       threshold is never flagged. A ``NaN`` value is never flagged; infinite values (including
       non-positive values when using the ``log``) are compared as usual, so they are flagged on the
       matching side.
    """
    if direction not in DIRECTIONS:
        raise ValueError(f"invalid outliers direction: {direction} (not one of: {', '.join(DIRECTIONS)})")
    if nmads < 0:
        raise ValueError(f"invalid outliers nmads: {nmads}")

    values = ut.to_numpy_vector(values).astype("float64")
    if values.size == 0:
        raise ut.DegenerateInput(f"no values for the metric: {metric}")

    if log:
        transformed = np.full(values.size, -np.inf)
        positive_mask = values > 0
        transformed[positive_mask] = np.log(values[positive_mask])
        transformed[np.isnan(values)] = np.nan
    else:
        transformed = values

    median, mad = ut.median_and_mad(transformed, scale=mad_scale)
    if np.isnan(median):
        raise ut.DegenerateInput(f"no finite values for the metric: {metric}")

    lower = median - nmads * mad
    upper = median + nmads * mad
    if ut.logging_calc():
        ut.log_calc(f"{metric} median", median)
        ut.log_calc(f"{metric} mad", mad)

    outliers_mask = np.zeros(values.size, dtype="bool")
    with np.errstate(invalid="ignore"):
        if direction in ("lower", "both"):
            outliers_mask |= transformed < lower
        if direction in ("upper", "both"):
            outliers_mask |= transformed > upper

    if log:
        lower = float(np.exp(lower))
        upper = float(np.exp(upper))

    thresholds = OutlierThresholds(
        metric=metric,
        direction=direction,
        log=log,
        nmads=float(nmads),
        median=float(median),
        mad=float(mad),
        lower=float(lower),
        upper=float(upper),
    )
    return outliers_mask, thresholds


@ut.logged()
@ut.timed_call()
@ut.expand_doc()
def find_mad_outliers(
    store: ut.MatrixStore,
    metric: str,
    *,
    direction: str = pr.outliers_direction,
    log: bool = pr.outliers_log,
    nmads: float = pr.outliers_nmads,
    mad_scale: float = pr.outliers_mad_scale,
    to: Optional[str] = None,
    inplace: bool = True,
) -> Optional[Tuple[ut.PandasSeries, OutlierThresholds]]:
    """
    Detect cells whose value of some per-cell ``metric`` is an outlier.

    **Input**

    A :py:class:`scqc.utilities.annotation.MatrixStore` containing the per-cell ``metric`` (see
    :py:func:`scqc.tools.metrics.compute_cell_metrics`).

    **Returns**

    Cell Annotations
        ``<metric>_outlier`` (or ``to``, if specified)
            A boolean mask of the outlier cells.

    Audit Data
        ``outlier_thresholds``
            A mapping from the metric name to the (dictionary form of the)
            :py:class:`OutlierThresholds` used.

    If ``inplace`` (default: {inplace}), these are written to the store and the function returns
    ``None``. Otherwise, returns the mask as a pandas series (indexed by the cell identifiers) and the
    thresholds.

    **Computation Parameters**

    1. Invoke :py:func:`compute_mad_outliers` using the ``direction`` (default: {direction}),
       ``log`` (default: {log}), ``nmads`` (default: {nmads}) and ``mad_scale`` (default:
       {mad_scale}).
    """
    values = ut.get_o_numpy(store, metric, formatter=ut.sizes_description)
    outliers_mask, thresholds = compute_mad_outliers(
        values, metric=metric, direction=direction, log=log, nmads=nmads, mad_scale=mad_scale
    )

    if not inplace:
        ut.log_return(f"{metric}_outlier", outliers_mask)
        ut.log_return(f"{metric}_thresholds", thresholds._asdict())
        return ut.to_pandas_series(outliers_mask, index=store.cell_ids), thresholds

    ut.set_o_data(store, to or f"{metric}_outlier", outliers_mask)

    if ut.has_data(store, "outlier_thresholds"):
        thresholds_by_metric = dict(ut.get_m_data(store, "outlier_thresholds"))
    else:
        thresholds_by_metric = {}
    thresholds_by_metric[metric] = thresholds._asdict()
    ut.set_m_data(store, "outlier_thresholds", thresholds_by_metric)
    return None


def get_outlier_thresholds(store: ut.MatrixStore) -> Dict[str, OutlierThresholds]:
    """
    Return the thresholds used by all the :py:func:`find_mad_outliers` calls on the ``store``, by the
    metric name.
    """
    if not ut.has_data(store, "outlier_thresholds"):
        return {}
    return {
        metric: OutlierThresholds(**fields) for metric, fields in ut.get_m_data(store, "outlier_thresholds").items()
    }
