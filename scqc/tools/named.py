"""
Named
-----
"""

from re import Pattern
from typing import Collection
from typing import NamedTuple
from typing import Optional
from typing import Tuple
from typing import Union

import numpy as np

import scqc.utilities as ut

__all__ = [
    "GeneSubset",
    "find_named_genes",
]


class GeneSubset(NamedTuple):
    """
    An immutable named set of gene identifiers (e.g., mitochondrial genes or spike-ins), used to
    compute per-subset QC metrics.
    """

    #: The name of the subset, used in the metric names (e.g., ``mito``).
    name: str

    #: The identifiers of the genes in the subset.
    gene_ids: Tuple[str, ...]


@ut.logged()
@ut.timed_call()
@ut.expand_doc()
def find_named_genes(
    store: ut.MatrixStore,
    *,
    subset: Optional[str] = None,
    name_property: Optional[str] = None,
    names: Optional[Collection[str]] = None,
    patterns: Optional[Collection[Union[str, Pattern]]] = None,
    invert: bool = False,
    to: Optional[str] = None,
) -> Union[GeneSubset, ut.PandasSeries, None]:
    """
    Find genes by their (case-insensitive) name.

    This computes a mask of all the genes whose name appears in ``names`` or matches any of the
    ``patterns`` (e.g. ``MT-.*`` for mitochondrial genes or ``ERCC-.*`` for spike-ins). Names which
    do not match any gene are silently ignored. If ``invert`` (default: {invert}), invert the
    resulting mask.

    If ``name_property`` (default: {name_property}) is specified the mask will be based on this
    per-gene property (e.g., ``symbol``). Otherwise, it is based on the gene identifiers.

    **Returns**

    If ``subset`` (default: {subset}) is specified, returns a :py:class:`GeneSubset` with this name
    containing the identifiers of the matching genes.

    Otherwise, if ``to`` (default: {to}) is specified, this is stored as a per-gene annotation with
    that name, and returns ``None``.

    Otherwise, it returns the mask as a pandas series (indexed by the gene identifiers).
    """
    if name_property is None:
        gene_names = ut.get_v_names(store)
    else:
        gene_names = ut.get_v_numpy(store, name_property)
    gene_names = [str(name) for name in gene_names]

    if names is None or len(names) == 0:
        names_mask = np.zeros(store.n_genes, dtype="bool")
    else:
        lower_names_set = {name.lower() for name in names}
        names_mask = np.array([name.lower() in lower_names_set for name in gene_names], dtype="bool")

    if patterns is None or len(patterns) == 0:
        patterns_mask = np.zeros(store.n_genes, dtype="bool")
    else:
        patterns_mask = ut.patterns_matches(patterns, gene_names)

    genes_mask = names_mask | patterns_mask

    if invert:
        genes_mask = ~genes_mask

    if subset is not None:
        gene_ids = tuple(np.array(store.gene_ids, dtype="object")[genes_mask])
        ut.log_return(subset, genes_mask)
        return GeneSubset(name=subset, gene_ids=gene_ids)

    if to is not None:
        ut.set_v_data(store, to, genes_mask)
        return None

    ut.log_return("named_genes", genes_mask)
    return ut.to_pandas_series(genes_mask, index=store.gene_ids)
