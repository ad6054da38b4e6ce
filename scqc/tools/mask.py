"""
Mask
----
"""

from typing import Collection
from typing import Mapping
from typing import Optional
from typing import Union

import numpy as np

import scqc.utilities as ut

__all__ = [
    "combine_masks",
]


@ut.logged()
@ut.timed_call()
@ut.expand_doc()
def combine_masks(  # pylint: disable=too-many-branches
    store: ut.MatrixStore,
    masks: Union[Collection[str], Mapping[str, ut.Vector]],
    *,
    per: str = "cells",
    invert: bool = False,
    to: Optional[str] = "discard",
) -> Optional[ut.PandasSeries]:
    """
    Combine different pre-computed masks into a final overall mask.

    **Input**

    A :py:class:`scqc.utilities.annotation.MatrixStore`, and the ``masks`` to combine, which are
    either the names of per-cell (or per-gene, if ``per`` (default: {per}) is ``genes``) boolean
    annotations, or a mapping from a mask name to a boolean vector.

    **Returns**

    If ``to`` (default: {to}) is ``None``, returns the computed mask as a pandas series. Otherwise,
    sets the mask as a per-cell (or per-gene) annotation and returns ``None``.

    **Computation Parameters**

    1. For each of the masks, in order (left to right), fetch it. A missing mask raises
       :py:class:`scqc.utilities.errors.NotFound`, unless its name has a ``?`` suffix, in which case
       it is silently ignored. If the first character of the mask name is ``&``, restrict the current
       mask. Otherwise, we'll expand (OR) the current mask; an explicit ``|`` prefix is allowed. If
       the following character is ``~``, first invert the mask before applying it.

    2. If there are no masks, the result is all-false (nothing is flagged).

    3. If ``invert`` (default: {invert}), invert the final result mask.
    """
    if per not in ("cells", "genes"):
        raise ValueError(f"invalid mask per: {per} (not cells or genes)")
    size = store.n_cells if per == "cells" else store.n_genes

    result_mask: Optional[ut.NumpyVector] = None

    for mask_name in masks:
        log_mask_name = mask_name

        if mask_name[0] == "&":
            is_or = False
            mask_name = mask_name[1:]
        else:
            is_or = True
            if mask_name[0] == "|":
                mask_name = mask_name[1:]

        if mask_name[0] == "~":
            invert_mask = True
            mask_name = mask_name[1:]
        else:
            invert_mask = False

        if mask_name[-1] == "?":
            must_exist = False
            mask_name = mask_name[:-1]
        else:
            must_exist = True

        if isinstance(masks, Mapping):
            mask = ut.to_numpy_vector(masks[log_mask_name])
            if len(mask) != size:
                raise ut.DimensionMismatch(f"the mask: {mask_name} size: {len(mask)} does not match: {size} {per}")
        elif per == "cells" and mask_name in store.adata.obs:
            mask = ut.get_o_numpy(store, mask_name, formatter=ut.mask_description)
        elif per == "genes" and mask_name in store.adata.var:
            mask = ut.get_v_numpy(store, mask_name, formatter=ut.mask_description)
        else:
            if must_exist:
                raise ut.NotFound(f"unknown {per} mask: {mask_name} in the store: {store.name or 'unnamed'}")
            continue

        if mask.dtype != "bool":
            raise ValueError(f"the data: {mask_name} is not a boolean mask")

        if invert_mask:
            mask = ~mask

        if ut.logging_calc():
            ut.log_calc(log_mask_name, mask)

        if result_mask is None:
            result_mask = mask
        elif is_or:
            result_mask = result_mask | mask
        else:
            result_mask = result_mask & mask

    if result_mask is None:
        result_mask = np.zeros(size, dtype="bool")

    if invert:
        result_mask = ~result_mask

    if to is None:
        ut.log_return("result", result_mask)
        return ut.to_pandas_series(result_mask, index=store.cell_ids if per == "cells" else store.gene_ids)

    if per == "cells":
        ut.set_o_data(store, to, result_mask)
    else:
        ut.set_v_data(store, to, result_mask)
    return None
