"""
Normalize
---------

Cells differ in their sequencing depth (library size), so their raw counts can't be directly
compared. The classical fix is to divide each cell by its total count (e.g., counts per million).
This works if all the cells have the same composition, but is biased when they don't: if some
genes are very highly expressed in some cells, the rest of the genes in these cells look like they
are under-expressed.

The pooled size factors method (deconvolution, as popularized by ``scran``) avoids this bias by
assuming that most genes are *not* differentially expressed between similar cells. It computes the
median ratio of the genes between a pool of cells and a reference, which is robust to the minority
of differentially expressed genes. Single cells are too sparse for this to work, so it sums the
cells into pools, and then deconvolves the per-pool factors back into per-cell factors.

The size factors are then used to compute log-normalized assays, alongside log-transformed raw counts
and log counts per million for comparison.
"""

from typing import Collection
from typing import Dict
from typing import List
from typing import Optional
from typing import Tuple
from typing import Union

import numpy as np
import scipy.sparse as sp  # type: ignore
import scipy.sparse.linalg as sla  # type: ignore

import scqc.parameters as pr
import scqc.utilities as ut
from scqc.tools.clustering import ClusteringStrategy
from scqc.tools.clustering import find_pooling_groups

__all__ = [
    "CENTERS",
    "compute_pooled_size_factors",
    "compute_library_size_factors",
    "compute_log_normalized",
    "compute_log_cpm",
    "compute_log_raw",
]

#: The valid ways to center the size factors.
CENTERS = ("mean", "median")


def _library_sizes(store: ut.MatrixStore, what: str) -> ut.NumpyVector:
    if store.n_cells == 0:
        raise ut.DegenerateInput(f"no cells to normalize in the store: {store.name or 'unnamed'}")

    sums = ut.get_o_numpy(store, what, sum=True).astype("float64")
    zero_mask = sums <= 0
    if np.any(zero_mask):
        zero_cells = np.array(store.cell_ids, dtype="object")[zero_mask]
        raise ut.DegenerateInput(
            f"{len(zero_cells)} cells with zero library size in the store: {store.name or 'unnamed'}: "
            f"{ut.describe_names(zero_cells)} (filter them before normalizing)"
        )
    return sums


def _centered(factors: ut.NumpyVector, center: str) -> ut.NumpyVector:
    if center not in CENTERS:
        raise ValueError(f"invalid size factors center: {center} (not one of: {', '.join(CENTERS)})")
    if center == "mean":
        return factors / np.mean(factors)
    return factors / np.median(factors)


@ut.logged()
@ut.timed_call()
@ut.expand_doc()
def compute_library_size_factors(
    store: ut.MatrixStore,
    what: str = "counts",
    *,
    center: str = pr.size_factors_center,
    to: Optional[str] = "size_factor",
) -> Optional[ut.PandasSeries]:
    """
    Compute the library size factors of the cells, that is, the total ``what`` (default: {what})
    of each cell, centered to a ``center`` (default: {center}) of one.

    This is the simple baseline normalization, which ignores composition bias.

    **Returns**

    Cell Annotations
        ``to`` (default: {to})
            The library size factor of each cell.

    If ``to`` is ``None``, this is returned as a pandas series (indexed by the cell identifiers)
    instead.

    Cells with a zero library size raise :py:class:`scqc.utilities.errors.DegenerateInput`.
    """
    factors = _centered(_library_sizes(store, what), center)

    if to is None:
        ut.log_return("library_size_factor", factors, formatter=ut.sizes_description)
        return ut.to_pandas_series(factors, index=store.cell_ids)

    ut.set_o_data(store, to, factors, formatter=ut.sizes_description)
    return None


@ut.logged()
@ut.timed_call()
@ut.expand_doc()
def compute_pooled_size_factors(  # pylint: disable=too-many-locals,too-many-statements
    store: ut.MatrixStore,
    what: str = "counts",
    *,
    clustering: Union[ClusteringStrategy, str, None] = None,
    min_group_size: int = pr.min_group_size,
    pool_sizes: Collection[int] = pr.pool_sizes,
    cell_weight: float = pr.deconvolution_cell_weight,
    tolerance: float = pr.deconvolution_tolerance,
    max_iterations: int = pr.deconvolution_max_iterations,
    center: str = pr.size_factors_center,
    inplace: bool = True,
) -> Optional[ut.PandasSeries]:
    """
    Compute the pooled (deconvolution) size factors of the cells of the ``what`` (default: {what})
    data.

    **Input**

    A :py:class:`scqc.utilities.annotation.MatrixStore`, which should contain only the cells which
    passed QC. Cells with a zero library size raise
    :py:class:`scqc.utilities.errors.DegenerateInput`.

    **Returns**

    Cell Annotations
        ``size_factor``
            The strictly positive size factor of each cell.

        ``size_factor_group``
            The index of the group of cells each cell was pooled within.

        ``size_factor_fallback``
            A mask of the cells which use a library size factor since their group could not be
            pooled, or their deconvolved factor was not positive.

    Audit Data
        ``size_factor_fallbacks``
            A mapping from the index of each group (as a string) which used library size factors to
            the reason it could not be pooled.

    If ``inplace`` (default: {inplace}), these are written to the store, and the function returns
    ``None``. Otherwise, the size factors are returned as a pandas series (indexed by the cell
    identifiers).

    **Computation Parameters**

    1. Invoke :py:func:`scqc.tools.clustering.find_pooling_groups` using the ``clustering``
       (default: {clustering}) and ``min_group_size`` (default: {min_group_size}), to split the
       cells into coarse groups of similar cells.

    2. Within each group, normalize each cell by its library size, and compute the reference profile
       as the mean of these normalized profiles. Only genes with a positive reference participate in
       the rest of the computation.

    3. Order the cells by their library size, and place them on a ring, with the odd ranks in
       ascending order followed by the even ranks in descending order, so each window of the ring
       mixes small and large cells. For each of the ``pool_sizes`` (default: {pool_sizes}) which is
       not larger than the group, each position of the window on the ring gives a pool.

    4. The factor of each pool is the median, over the genes, of the ratio between the sum of the
       normalized profiles of the pool cells and the reference profile.

    5. Deconvolve the pool factors into per-cell factors by solving the linear system where the sum of
       the factors of the pool cells is the pool factor. To ensure the system is well-determined,
       also add an equation per cell whose weight is ``cell_weight`` (default: {cell_weight}),
       stating the cell factor is the median ratio of its own profile to the reference. This is
       solved using the iterative least squares ``scipy.sparse.linalg.lsqr``, which stops when the
       relative change is below the ``tolerance`` (default: {tolerance}) or after
       ``max_iterations`` (default: {max_iterations}). The size factor of each cell is the solved
       factor times its library size.

    6. Bring all the groups to a common scale, by multiplying the factors of each group by the median
       ratio of its reference profile to the reference profile of the group with the most detected
       genes.

    7. If a group has less than ``min_group_size`` cells (or is too small for any pool size), or the
       factor of a cell is not positive, fall back to the library size of these cells, scaled to
       match the rest of the cells. This is logged as a warning and recorded in the
       ``size_factor_fallback`` mask.

    8. Center the factors to a ``center`` (default: {center}) of one.
    """
    if center not in CENTERS:
        raise ValueError(f"invalid size factors center: {center} (not one of: {', '.join(CENTERS)})")
    if min_group_size < 1:
        raise ValueError(f"invalid min_group_size: {min_group_size}")
    if len(pool_sizes) == 0 or min(pool_sizes) < 1:
        raise ValueError(f"invalid pool_sizes: {pool_sizes}")

    sums = _library_sizes(store, what)
    counts = ut.get_vo_proper(store, what, layout="row_major")

    groups = ut.to_numpy_vector(
        find_pooling_groups(store, what, clustering=clustering, min_group_size=min_group_size, to=None)
    )
    groups_count = int(np.max(groups)) + 1

    @ut.timed_call("pool_group")
    def _pool_group_of(group_index: int) -> Tuple[Optional[ut.NumpyVector], Optional[ut.NumpyVector], Optional[str]]:
        cell_indices = np.where(groups == group_index)[0]
        try:
            factors, reference = _pool_group(
                counts[cell_indices, :],
                sums[cell_indices],
                group_index=group_index,
                min_group_size=min_group_size,
                pool_sizes=pool_sizes,
                cell_weight=cell_weight,
                tolerance=tolerance,
                max_iterations=max_iterations,
            )
        except ut.DegenerateGroup as error:
            return None, None, str(error)
        return factors, reference, None

    results = ut.parallel_map(_pool_group_of, groups_count)

    factor_of_cells = np.zeros(store.n_cells, dtype="float64")
    fallback_mask = np.zeros(store.n_cells, dtype="bool")
    references: List[Optional[ut.NumpyVector]] = []
    fallbacks: Dict[str, str] = {}
    for group_index, (factors, reference, problem) in enumerate(results):
        group_mask = groups == group_index
        if problem is not None:
            ut.logger().warning("using library size factors for %s cells: %s", int(np.sum(group_mask)), problem)
            fallback_mask[group_mask] = True
            fallbacks[str(group_index)] = problem
            references.append(None)
        else:
            factor_of_cells[group_mask] = factors
            references.append(reference)

    _rescale_groups(groups, references, factor_of_cells, fallback_mask)

    bad_mask = ~fallback_mask & ~(factor_of_cells > 0)
    if np.any(bad_mask):
        ut.logger().warning(
            "using library size factors for %s cells with non-positive pooled factors: %s",
            int(np.sum(bad_mask)),
            ut.describe_names(np.array(store.cell_ids, dtype="object")[bad_mask]),
        )
        for group_index in np.unique(groups[bad_mask]):
            fallbacks.setdefault(
                str(group_index),
                f"non-positive pooled factors for {int(np.sum(bad_mask & (groups == group_index)))} cells",
            )
        fallback_mask |= bad_mask

    size_factors = factor_of_cells * sums
    pooled_mask = ~fallback_mask
    if np.any(pooled_mask):
        scale = np.median(size_factors[pooled_mask] / sums[pooled_mask])
    else:
        scale = 1.0
    size_factors[fallback_mask] = sums[fallback_mask] * scale
    size_factors = _centered(size_factors, center)

    if ut.logging_calc():
        ut.log_calc("fallback cells", fallback_mask)

    if not inplace:
        ut.log_return("size_factor", size_factors, formatter=ut.sizes_description)
        return ut.to_pandas_series(size_factors, index=store.cell_ids)

    ut.set_o_data(store, "size_factor", size_factors, formatter=ut.sizes_description)
    ut.set_o_data(store, "size_factor_group", groups, formatter=ut.groups_description)
    ut.set_o_data(store, "size_factor_fallback", fallback_mask)
    ut.set_m_data(store, "size_factor_fallbacks", fallbacks)
    return None


def _pool_group(  # pylint: disable=too-many-locals
    counts: ut.ProperMatrix,
    sums: ut.NumpyVector,
    *,
    group_index: int,
    min_group_size: int,
    pool_sizes: Collection[int],
    cell_weight: float,
    tolerance: float,
    max_iterations: int,
) -> Tuple[ut.NumpyVector, ut.NumpyVector]:
    size = len(sums)
    if size < min_group_size:
        raise ut.DegenerateGroup(
            f"the group: {group_index} has only: {size} cells (less than: {min_group_size})", group=group_index
        )

    group_pool_sizes = sorted({pool_size for pool_size in pool_sizes if pool_size <= size})
    if len(group_pool_sizes) == 0:
        raise ut.DegenerateGroup(
            f"the group: {group_index} has only: {size} cells (less than the smallest pool size: {min(pool_sizes)})",
            group=group_index,
        )

    profiles = ut.to_numpy_matrix(ut.fraction_by(counts, sums=sums, by="row"))
    reference = np.mean(profiles, axis=0)
    genes_mask = reference > 0
    profiles = profiles[:, genes_mask]
    used_reference = reference[genes_mask]

    order = np.argsort(sums, kind="stable")
    ring = np.concatenate([order[0::2], order[1::2][::-1]])

    ring_profiles = profiles[ring, :]
    cumulative = np.zeros((2 * size + 1, ring_profiles.shape[1]), dtype="float64")
    np.cumsum(np.concatenate([ring_profiles, ring_profiles]), axis=0, out=cumulative[1:, :])

    starts = np.arange(size)
    rows_of_pools: List[ut.NumpyVector] = []
    columns_of_pools: List[ut.NumpyVector] = []
    pool_factors: List[ut.NumpyVector] = []
    for pool_size in group_pool_sizes:
        pool_sums = cumulative[starts + pool_size, :] - cumulative[starts, :]
        pool_factors.append(np.median(pool_sums / used_reference[None, :], axis=1))
        members = ring[(starts[:, None] + np.arange(pool_size)[None, :]) % size]
        rows_of_pools.append(np.repeat(starts + size * len(rows_of_pools), pool_size))
        columns_of_pools.append(members.reshape(-1))

    pools_count = size * len(group_pool_sizes)
    weight = np.sqrt(cell_weight)
    cell_factors = ut.median_of_ratios(profiles, used_reference, per="row")

    rows = np.concatenate(rows_of_pools + [pools_count + starts])
    columns = np.concatenate(columns_of_pools + [starts])
    pool_entries = sum(len(members) for members in columns_of_pools)
    data = np.concatenate([np.ones(pool_entries), np.full(size, weight)])
    design = sp.csr_matrix((data, (rows, columns)), shape=(pools_count + size, size))
    targets = np.concatenate(pool_factors + [weight * cell_factors])

    solution, stop_reason, iterations = sla.lsqr(
        design, targets, atol=tolerance, btol=tolerance, iter_lim=max_iterations
    )[:3]
    if stop_reason == 7:
        ut.logger().warning(
            "the size factors deconvolution of the group: %s did not converge in %s iterations",
            group_index,
            iterations,
        )

    return solution, reference


def _rescale_groups(
    groups: ut.NumpyVector,
    references: List[Optional[ut.NumpyVector]],
    factor_of_cells: ut.NumpyVector,
    fallback_mask: ut.NumpyVector,
) -> None:
    pooled_groups = [group_index for group_index, reference in enumerate(references) if reference is not None]
    if len(pooled_groups) == 0:
        return

    base_group = max(pooled_groups, key=lambda group_index: int(np.sum(references[group_index] > 0)))  # type: ignore
    base_reference = references[base_group]
    assert base_reference is not None
    base_mask = base_reference > 0

    for group_index in pooled_groups:
        reference = references[group_index]
        assert reference is not None
        ratio = float(np.median(reference[base_mask] / base_reference[base_mask]))
        group_mask = groups == group_index
        if not np.isfinite(ratio) or ratio <= 0:
            ut.logger().warning(
                "using library size factors for %s cells: the group: %s can't be scaled to the group: %s",
                int(np.sum(group_mask)),
                group_index,
                base_group,
            )
            fallback_mask[group_mask] = True
        else:
            if ut.logging_calc():
                ut.log_calc(f"group {group_index} scale", ratio)
            factor_of_cells[group_mask] *= ratio


def _log_assay(matrix: ut.ProperMatrix, *, base: float, normalization: float) -> ut.ProperMatrix:
    sparse = ut.maybe_compressed_matrix(matrix)
    if sparse is None or normalization != 1:
        return ut.log_data(matrix, base=base, normalization=normalization)

    # log(0 + 1) is zero, so sparse data stays sparse.
    logged = sparse.astype("float64", copy=True)
    logged.data = ut.log_data(logged.data, base=base, normalization=1)
    return logged


@ut.logged()
@ut.timed_call()
@ut.expand_doc()
def compute_log_normalized(
    store: ut.MatrixStore,
    what: str = "counts",
    *,
    size_factors: Union[str, ut.Vector] = "size_factor",
    base: float = pr.log_base,
    normalization: float = pr.log_normalization,
    to: str = "logcounts",
) -> None:
    """
    Compute the log-normalized ``what`` (default: {what}) data, that is,
    ``log(counts / size_factor + normalization)``.

    **Returns**

    Assays
        ``to`` (default: {to})
            The log (base {base}) of the data divided by the size factor of each cell, plus
            ``normalization`` (default: {normalization}).

    If ``size_factors`` (default: {size_factors}) is a string, it is the name of a per-cell
    annotation. Otherwise it should be a vector with one entry per cell; a vector of the wrong length
    raises :py:class:`scqc.utilities.errors.DimensionMismatch`. Non-positive size factors raise
    :py:class:`scqc.utilities.errors.DegenerateInput`.
    """
    factors = ut.get_o_numpy(store, size_factors, formatter=ut.sizes_description).astype("float64")
    if not np.all(factors > 0):
        raise ut.DegenerateInput(
            f"non-positive size factors for {int(np.sum(~(factors > 0)))} cells "
            f"in the store: {store.name or 'unnamed'}"
        )

    counts = ut.get_vo_proper(store, what, layout="row_major")
    normalized = ut.scale_by(counts, 1.0 / factors, by="row")
    ut.set_vo_data(store, to, _log_assay(normalized, base=base, normalization=normalization))


@ut.logged()
@ut.timed_call()
@ut.expand_doc()
def compute_log_cpm(
    store: ut.MatrixStore,
    what: str = "counts",
    *,
    scale: float = pr.cpm_scale,
    base: float = pr.log_base,
    normalization: float = pr.log_normalization,
    to: str = "logcpm",
) -> None:
    """
    Compute the log counts per million of the ``what`` (default: {what}) data, that is,
    ``log(counts / sum * scale + normalization)``.

    This ignores composition bias, and is provided for comparison with the pooled size factors.

    **Returns**

    Assays
        ``to`` (default: {to})
            The log (base {base}) of the data divided by the total of each cell, times ``scale``
            (default: {scale}), plus ``normalization`` (default: {normalization}). Cells with a zero
            total are all-zero (before adding the ``normalization``).
    """
    counts = ut.get_vo_proper(store, what, layout="row_major")
    sums = ut.sum_per(counts, per="row").astype("float64")
    cpm = ut.fraction_by(counts, sums=sums / scale, by="row")
    ut.set_vo_data(store, to, _log_assay(cpm, base=base, normalization=normalization))


@ut.logged()
@ut.timed_call()
@ut.expand_doc()
def compute_log_raw(
    store: ut.MatrixStore,
    what: str = "counts",
    *,
    base: float = pr.log_base,
    normalization: float = pr.log_normalization,
    to: str = "logcounts_raw",
) -> None:
    """
    Compute the log of the raw ``what`` (default: {what}) data, that is,
    ``log(counts + normalization)``.

    **Returns**

    Assays
        ``to`` (default: {to})
            The log (base {base}) of the data plus ``normalization`` (default: {normalization}).
    """
    counts = ut.get_vo_proper(store, what, layout="row_major")
    ut.set_vo_data(store, to, _log_assay(counts, base=base, normalization=normalization))
