"""
Group
-----
"""

from typing import Optional
from typing import Union

import numpy as np

import scqc.utilities as ut

__all__ = [
    "group_cells_data",
]


@ut.logged()
@ut.timed_call()
@ut.expand_doc()
def group_cells_data(
    store: ut.MatrixStore,
    what: str = "counts",
    *,
    groups: Union[str, ut.Vector],
    name: Optional[str] = None,
) -> Optional[ut.MatrixStore]:
    """
    Compute a new (pseudo-bulk) store which has the ``what`` (default: {what}) sum of the cells for
    each group.

    For example, having a per-cell ``individual`` or ``batch`` annotation, compute the pseudo-bulk
    profile of each for further analysis.

    If ``groups`` is a string, it is expected to be the name of a per-cell annotation. Otherwise it
    should be a vector. If the groups are integers, negative values indicate "no group" and
    non-negative values indicate the index of the group to which each cell belongs to. Otherwise,
    the groups are arbitrary labels (missing labels indicate "no group"), and the groups are ordered
    by their first appearance.

    **Input**

    A :py:class:`scqc.utilities.annotation.MatrixStore`.

    **Returns**

    A new store with the same genes, where each column is the sum of a group of the original cells.
    Cells without a group are discarded. If all cells are discarded, return ``None``.

    The new store will contain only:

    * The ``counts`` holding the summed-per-group data.

    * A new ``grouped`` per-cell (per-group) data which counts, for each group, the number of cells
      summed into it.

    If ``name`` (default: {name}) is not specified, the store keeps the original name. Otherwise, if
    it starts with a ``.``, it will be appended to the current name (if any). Otherwise, ``name`` is
    the new name.
    """
    group_of_cells = ut.get_o_numpy(store, groups, formatter=ut.groups_description)

    if np.issubdtype(group_of_cells.dtype, np.integer):
        group_indices = ut.compress_indices(group_of_cells)
        group_names = [str(group) for group in np.unique(group_of_cells[group_of_cells >= 0])]
    else:
        codes, labels = ut.PandasSeries(group_of_cells).factorize()
        group_indices = np.asarray(codes)
        group_names = [str(label) for label in labels]

    data = ut.get_vo_proper(store, what, layout="row_major")
    results = ut.sum_groups(data, group_indices, per="row")
    if results is None:
        return None
    summed_data, cell_counts = results

    gstore = ut.MatrixStore(summed_data.T, gene_ids=store.gene_ids, cell_ids=group_names, genes=store.genes)
    ut.set_name(gstore, store.name)
    ut.set_name(gstore, name)

    ut.set_o_data(gstore, "grouped", cell_counts, formatter=ut.sizes_description)

    return gstore
