"""
Filter
------
"""

from typing import List
from typing import Optional
from typing import Tuple

import numpy as np

import scqc.utilities as ut
from scqc.tools.mask import combine_masks

__all__ = [
    "filter_data",
]


@ut.logged()
@ut.timed_call()
@ut.expand_doc()
def filter_data(  # pylint: disable=dangerous-default-value
    store: ut.MatrixStore,
    cell_masks: List[str] = [],
    gene_masks: List[str] = [],
    *,
    mask_cells: Optional[str] = None,
    mask_genes: Optional[str] = None,
    invert_cells: bool = False,
    invert_genes: bool = False,
    track_cells: Optional[str] = None,
    track_genes: Optional[str] = None,
    name: Optional[str] = None,
    top_level: bool = True,
) -> Optional[Tuple[ut.MatrixStore, ut.PandasSeries, ut.PandasSeries]]:
    """
    Filter (slice) the data based on previously-computed masks.

    For example, it is useful to discard genes which are not detected in any cell, cells which were
    flagged as outliers, etc. In general, the "best" filter depends on the data set.

    This function makes it easy to combine different pre-computed per-cell and per-gene boolean mask
    annotations into a final overall inclusion mask, and slice the data accordingly.

    **Input**

    A :py:class:`scqc.utilities.annotation.MatrixStore`.

    **Returns**

    A new store containing a subset of the cells and genes (with all the assays and metadata sliced
    together, preserving the original order), and the masks of the kept cells and genes.

    If no cells and/or no genes were selected by the filter, returns ``None``.

    If ``name`` (default: {name}) is not specified, the returned store keeps the original name.
    Otherwise, if the name starts with a ``.``, it will be appended to the current name (if any).
    Otherwise, ``name`` is the new name.

    If ``mask_cells`` and/or ``mask_genes`` are specified, store the mask of the selected data as a
    per-cell and/or per-gene annotation of the full ``store``.

    If ``track_cells`` and/or ``track_genes`` are specified, store the original indices of the
    selected data as a per-cell and/or per-gene annotation of the result.

    **Computation Parameters**

    1. Combine the masks in ``cell_masks`` and/or ``gene_masks`` using
       :py:func:`scqc.tools.mask.combine_masks` passing it ``invert_cells`` (default:
       {invert_cells}) and ``invert_genes`` (default: {invert_genes}), and ``mask_cells`` and
       ``mask_genes`` as the ``to`` parameter. If either list of masks is empty, use the full mask.

    2. If the obtained masks for either the cells or genes is empty, return ``None``. Otherwise,
       return a slice of the full data containing just the cells and genes specified by the final
       masks.
    """
    cells_mask = _combined_mask(store, cell_masks, per="cells", invert=invert_cells, to=mask_cells)
    genes_mask = _combined_mask(store, gene_masks, per="genes", invert=invert_genes, to=mask_genes)

    if not np.any(cells_mask) or not np.any(genes_mask):
        return None

    fstore = ut.slice(
        store,
        name=name,
        top_level=top_level,
        cells=cells_mask,
        genes=genes_mask,
        track_cells=track_cells,
        track_genes=track_genes,
    )

    return (
        fstore,
        ut.to_pandas_series(cells_mask, index=store.cell_ids),
        ut.to_pandas_series(genes_mask, index=store.gene_ids),
    )


def _combined_mask(
    store: ut.MatrixStore, masks: List[str], *, per: str, invert: bool, to: Optional[str]
) -> ut.NumpyVector:
    size = store.n_cells if per == "cells" else store.n_genes

    if len(masks) == 0:
        mask = np.full(size, True, dtype="bool")
        if to is not None:
            if per == "cells":
                ut.set_o_data(store, to, mask)
            else:
                ut.set_v_data(store, to, mask)
        return mask

    result = combine_masks(store, masks, per=per, invert=invert, to=to)
    if result is None:
        assert to is not None
        if per == "cells":
            return ut.get_o_numpy(store, to, formatter=ut.mask_description)
        return ut.get_v_numpy(store, to, formatter=ut.mask_description)
    return ut.to_numpy_vector(result)
