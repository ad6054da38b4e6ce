"""
Normalize
---------
"""

from typing import Collection
from typing import Union

import scqc.parameters as pr
import scqc.tools as tl
import scqc.utilities as ut

__all__ = [
    "normalize_clean_data",
]


@ut.logged()
@ut.timed_call()
@ut.expand_doc()
def normalize_clean_data(
    store: ut.MatrixStore,
    what: str = "counts",
    *,
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
) -> None:
    """
    Normalize the "clean" ``store``.

    **Input**

    A :py:class:`scqc.utilities.annotation.MatrixStore`, typically the result of
    :py:func:`scqc.pipeline.clean.extract_clean_data`.

    **Returns**

    Sets the following in the store:

    Cell Annotations
        ``library_size_factor``
            The simple library size factor of each cell, for comparison.

        ``size_factor``, ``size_factor_group``, ``size_factor_fallback``
            The pooled size factor of each cell, the group it was pooled in, and whether it fell
            back to the library size factor.

    Assays
        ``logcounts_raw``, ``logcpm``, ``logcounts``
            The log of the raw counts, of the counts per million, and of the counts normalized by
            the size factors.

    **Computation Parameters**

    1. Invoke :py:func:`scqc.tools.normalize.compute_library_size_factors` centering to the
       ``size_factors_center`` (default: {size_factors_center}).

    2. Invoke :py:func:`scqc.tools.normalize.compute_pooled_size_factors` using the ``clustering``
       (default: {clustering}), ``min_group_size`` (default: {min_group_size}), ``pool_sizes``
       (default: {pool_sizes}), ``deconvolution_cell_weight`` (default:
       {deconvolution_cell_weight}), ``deconvolution_tolerance`` (default:
       {deconvolution_tolerance}) and ``deconvolution_max_iterations`` (default:
       {deconvolution_max_iterations}).

    3. Invoke :py:func:`scqc.tools.normalize.compute_log_raw`,
       :py:func:`scqc.tools.normalize.compute_log_cpm` (using the ``cpm_scale``, default:
       {cpm_scale}) and :py:func:`scqc.tools.normalize.compute_log_normalized`, all using the
       ``log_base`` (default: {log_base}) and ``log_normalization`` (default: {log_normalization}).
    """
    tl.compute_library_size_factors(store, what, center=size_factors_center, to="library_size_factor")
    tl.compute_pooled_size_factors(
        store,
        what,
        clustering=clustering,
        min_group_size=min_group_size,
        pool_sizes=pool_sizes,
        cell_weight=deconvolution_cell_weight,
        tolerance=deconvolution_tolerance,
        max_iterations=deconvolution_max_iterations,
        center=size_factors_center,
    )
    tl.compute_log_raw(store, what, base=log_base, normalization=log_normalization)
    tl.compute_log_cpm(store, what, scale=cpm_scale, base=log_base, normalization=log_normalization)
    tl.compute_log_normalized(store, what, base=log_base, normalization=log_normalization)
