"""
Computation
-----------

Most of the functions defined here are thin wrappers around builtin numpy or scipy functions.

The key distinction of the functions here is that they provide a uniform interface for both dense
numpy and compressed sparse matrices, which makes them safe to use without worrying about the exact
data type used. They never modify their inputs.

All the functions here (optionally) also allow collecting timing information using
:py:mod:`scqc.utilities.timing`, to make it easier to locate the performance bottleneck of the
analysis pipeline.
"""

import re
from re import Pattern
from typing import Collection
from typing import Optional
from typing import Tuple
from typing import TypeVar
from typing import Union

import numpy as np
import scipy.sparse as sp  # type: ignore
import scipy.stats as ss  # type: ignore

import scqc.utilities.documentation as utd
import scqc.utilities.timing as utm
import scqc.utilities.typing as utt

__all__ = [
    "to_layout",
    "log_data",
    "sum_per",
    "nnz_per",
    "count_above_per",
    "mean_per",
    "scale_by",
    "fraction_by",
    "sum_groups",
    "median_and_mad",
    "median_of_ratios",
    "patterns_matches",
    "compress_indices",
]


@utm.timed_call()
def to_layout(matrix: utt.Matrix, layout: str) -> utt.ProperMatrix:
    """
    Return the ``matrix`` in a specific ``layout`` for efficient processing.

    That is, if ``layout`` is ``column_major``, re-layout the matrix for efficient per-column
    (variable, gene) slicing/processing. For sparse matrices, this is ``csc`` format; for dense
    matrices, this is Fortran (column-major) format.

    Similarly, if ``layout`` is ``row_major``, re-layout the matrix for efficient per-row
    (observation, cell) slicing/processing. For sparse matrices, this is ``csr`` format; for dense
    matrices, this is C (row-major) format.

    If the matrix is already in the correct layout, it is returned as-is.
    """
    assert layout in utt.LAYOUT_OF_AXIS

    sparse = utt.maybe_sparse_matrix(matrix)
    if sparse is not None:
        utm.timed_parameters(rows=sparse.shape[0], columns=sparse.shape[1], nnz=sparse.nnz)
        if layout == "row_major":
            return sparse if sparse.format == "csr" else sparse.tocsr()
        return sparse if sparse.format == "csc" else sparse.tocsc()

    dense = utt.to_numpy_matrix(matrix)
    if utt.matrix_layout(dense) == layout:
        return dense
    utm.timed_parameters(rows=dense.shape[0], columns=dense.shape[1])
    if layout == "row_major":
        return np.ascontiguousarray(dense)
    return np.asfortranarray(dense)


S = TypeVar("S", bound="utt.Shaped")


@utm.timed_call()
@utd.expand_doc()
def log_data(
    shaped: S,
    *,
    base: Optional[float] = None,
    normalization: float = 0,
) -> S:
    """
    Return the log of the values in the ``shaped`` data.

    If ``base`` is specified (default: {base}), use this base log. Otherwise, use the natural
    logarithm.

    The ``normalization`` (default: {normalization}) specifies how to deal with zeros in the data:

    * If it is zero, an input zero will become an output ``NaN``.

    * If it is positive, it is added to the input before computing the log.

    .. note::

        The result is always dense, as even for sparse data, the log is rarely zero.
    """
    assert normalization >= 0

    dense: np.ndarray
    if utt.is_1d(shaped):
        dense = utt.to_numpy_vector(shaped, copy=True).astype("float64")
    else:
        dense = utt.to_numpy_matrix(shaped, copy=True).astype("float64")  # type: ignore

    if base is None:
        log_function = np.log
    elif base == 2:
        log_function = np.log2
        base = None
    elif base == 10:
        log_function = np.log10
        base = None
    else:
        assert base > 0
        log_function = np.log

    if normalization > 0:
        dense += normalization
        log_function(dense, out=dense)
    else:
        where = dense > 0
        log_function(dense, out=dense, where=where)
        dense[~where] = np.nan

    if base is not None:
        dense /= np.log(base)

    return dense  # type: ignore


def _axis_of(per: str) -> int:
    assert per in utt.PER_OF_AXIS
    return 1 - utt.PER_OF_AXIS.index(per)


@utm.timed_call()
def sum_per(matrix: utt.Matrix, *, per: str) -> utt.NumpyVector:
    """
    Compute the total of the values ``per`` (``row`` or ``column``) of some ``matrix``.
    """
    axis = _axis_of(per)
    sparse = utt.maybe_sparse_matrix(matrix)
    if sparse is not None:
        return utt.to_numpy_vector(sparse.sum(axis=axis))
    return np.sum(utt.to_numpy_matrix(matrix), axis=axis)


@utm.timed_call()
def nnz_per(matrix: utt.Matrix, *, per: str) -> utt.NumpyVector:
    """
    Compute the number of positive values ``per`` (``row`` or ``column``) of some ``matrix``.

    .. note::

        For sparse matrices, this counts the stored values which are actually positive, so explicit
        zeros stored in the structure do not count.
    """
    return count_above_per(matrix, 0, per=per)


@utm.timed_call()
def count_above_per(matrix: utt.Matrix, threshold: float, *, per: str) -> utt.NumpyVector:
    """
    Compute the number of values strictly above some non-negative ``threshold`` ``per`` (``row`` or
    ``column``) of some ``matrix``.
    """
    assert threshold >= 0
    axis = _axis_of(per)
    sparse = utt.maybe_sparse_matrix(matrix)
    if sparse is not None:
        above = sp.csr_matrix(sparse) if sparse.format not in ("csr", "csc") else sparse.copy()
        above.data = (above.data > threshold).astype("int64")
        return utt.to_numpy_vector(above.sum(axis=axis)).astype("int64")
    return np.count_nonzero(utt.to_numpy_matrix(matrix) > threshold, axis=axis)


@utm.timed_call()
def mean_per(matrix: utt.Matrix, *, per: str) -> utt.NumpyVector:
    """
    Compute the mean of the values ``per`` (``row`` or ``column``) of some ``matrix``.
    """
    axis = _axis_of(per)
    size = matrix.shape[axis]
    if size == 0:
        return np.full(matrix.shape[1 - axis], np.nan)
    return sum_per(matrix, per=per) / size


@utm.timed_call()
def scale_by(matrix: utt.Matrix, scale: utt.Vector, *, by: str) -> utt.ProperMatrix:
    """
    Return a ``matrix`` where each ``by`` (``row`` or ``column``) is scaled by the matching value of
    the ``scale`` vector.
    """
    axis = utt.PER_OF_AXIS.index(by)
    scale = utt.to_numpy_vector(scale).astype("float64")
    assert len(scale) == matrix.shape[axis]

    sparse = utt.maybe_sparse_matrix(matrix)
    if sparse is not None:
        diagonal = sp.diags(scale)
        if by == "row":
            result = sp.csr_matrix(diagonal @ sparse)
        else:
            result = sp.csc_matrix(sparse @ diagonal)
        result.eliminate_zeros()
        return result

    dense = utt.to_numpy_matrix(matrix)
    if by == "row":
        return dense * scale[:, None]
    return dense * scale[None, :]


@utm.timed_call()
def fraction_by(matrix: utt.Matrix, *, sums: Optional[utt.Vector] = None, by: str) -> utt.ProperMatrix:
    """
    Return a matrix containing, in each entry, the fraction of the original data out of the total
    ``by`` (``row`` or ``column``).

    That is, the sum of ``by`` in the result will be 1. However, if ``sums`` is specified, it is used
    instead of the sum of each ``by``, so the sum of the results may be different. Rows (or columns)
    whose sum is zero are left all-zero.

    .. note::

        This assumes all the data values are non-negative.
    """
    if sums is None:
        sums = sum_per(matrix, per=by)
    else:
        sums = utt.to_numpy_vector(sums).astype("float64")

    zeros_mask = sums == 0
    scale = np.zeros(len(sums), dtype="float64")
    np.reciprocal(sums, out=scale, where=~zeros_mask)
    return scale_by(matrix, scale, by=by)


@utm.timed_call()
def sum_groups(
    matrix: utt.Matrix, groups: utt.Vector, *, per: str
) -> Optional[Tuple[utt.NumpyMatrix, utt.NumpyVector]]:
    """
    Given a ``matrix``, and a vector of ``groups`` ``per`` row or column, return a dense matrix with
    the sum of the groups for each ``per`` (row or column), and a vector with the number of summed
    elements in each group.

    The group indices are expected to be consecutive non-negative integers; negative group indices
    are ignored. If there are no groups, return ``None``.
    """
    groups = utt.to_numpy_vector(groups)
    assert len(groups) == matrix.shape[utt.PER_OF_AXIS.index(per)]

    groups_count = int(np.max(groups)) + 1 if len(groups) > 0 else 0
    if groups_count <= 0:
        return None

    grouped_mask = groups >= 0
    indicator = sp.csr_matrix(
        (np.ones(np.sum(grouped_mask)), (groups[grouped_mask], np.where(grouped_mask)[0])),
        shape=(groups_count, len(groups)),
    )
    counts = utt.to_numpy_vector(indicator.sum(axis=1)).astype("int64")

    if per == "row":
        summed = indicator @ matrix
    else:
        summed = (indicator @ matrix.T).T  # type: ignore

    return utt.to_numpy_matrix(summed).astype("float64"), counts


@utm.timed_call()
@utd.expand_doc()
def median_and_mad(values: utt.Vector, *, scale: float = 1.4826) -> Tuple[float, float]:
    """
    Return the median and the median absolute deviation of the finite ``values``.

    The deviation is multiplied by the ``scale`` (default: {scale}), which makes it a consistent
    estimator of the standard deviation for normally distributed data. The deviation is computed by
    ``scipy.stats.median_abs_deviation``.

    Non-finite values are ignored. Returns ``NaN`` for both if there are no finite values.
    """
    if scale <= 0:
        raise ValueError(f"invalid MAD scale: {scale}")

    values = utt.to_numpy_vector(values).astype("float64")
    values = values[np.isfinite(values)]
    if values.size == 0:
        return np.nan, np.nan
    median = float(np.median(values))
    mad = float(ss.median_abs_deviation(values, scale=1.0 / scale))
    return median, mad


@utm.timed_call()
def median_of_ratios(
    numerators: utt.Matrix, denominator: utt.Vector, *, per: str
) -> utt.NumpyVector:
    """
    Compute, ``per`` (``row`` or ``column``) of ``numerators``, the median of the ratios between its
    values and the matching entries of the ``denominator`` vector.

    Only entries where the ``denominator`` is positive participate in the median.
    """
    denominator = utt.to_numpy_vector(denominator).astype("float64")
    usable = denominator > 0
    assert np.any(usable)

    dense = utt.to_numpy_matrix(numerators)
    if per == "row":
        assert dense.shape[1] == len(denominator)
        ratios = dense[:, usable] / denominator[None, usable]
        return np.median(ratios, axis=1)

    assert dense.shape[0] == len(denominator)
    ratios = dense[usable, :] / denominator[usable, None]
    return np.median(ratios, axis=0)


@utm.timed_call()
@utd.expand_doc()
def patterns_matches(
    patterns: Union[str, Pattern, Collection[Union[str, Pattern]]],
    strings: Collection[str],
    invert: bool = False,
) -> utt.NumpyVector:
    """
    Given a collection of (case-insensitive) ``strings``, return a boolean mask specifying which of
    them match the given regular expression ``patterns``.

    If ``invert`` (default: {invert}), invert the mask.
    """
    if isinstance(patterns, (str, Pattern)):
        patterns = [patterns]

    utm.timed_parameters(patterns=len(patterns), strings=len(strings))

    if len(patterns) == 0:
        mask = np.zeros(len(strings), dtype="bool")
    else:
        unified_pattern = (
            "("
            + ")|(".join(
                [alternative if isinstance(alternative, str) else alternative.pattern for alternative in patterns]
            )
            + ")"
        )
        pattern: Pattern = re.compile(unified_pattern, re.IGNORECASE)
        mask = np.array([bool(pattern.match(str(string))) for string in strings], dtype="bool")

    if invert:
        mask = ~mask

    return mask


@utm.timed_call()
def compress_indices(indices: utt.Vector) -> utt.NumpyVector:
    """
    Given a vector of group ``indices`` per element, return a vector where the group indices are
    consecutive, preserving their relative order.

    Negative indices ("no group") are preserved as ``-1`` in the result.
    """
    indices = utt.to_numpy_vector(indices)
    result = np.full(len(indices), -1, dtype="int64")
    grouped_mask = indices >= 0
    if np.any(grouped_mask):
        _, consecutive = np.unique(indices[grouped_mask], return_inverse=True)
        result[grouped_mask] = consecutive.reshape(-1)
    return result
