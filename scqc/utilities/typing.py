"""
Typing
------

Count matrices arrive in many shapes: numpy arrays (or the dreaded ``numpy.matrix``), scipy sparse
matrices in any format, pandas data frames. Vectors may be numpy arrays, pandas series (possibly
categorical), or plain lists.

Duck typing almost works for these, which is worse than not working at all: ``matrix.sum(axis=0)``
returns a 2D ``numpy.matrix`` for sparse data and a 1D array for dense data, and so on. The aliases
here exist mostly for the benefit of ``mypy`` and for making the code's intent explicit, and the
``to_...`` functions convert whatever we were given into the few types the code actually operates
on:

* :py:const:`NumpyVector` - a 1D ``numpy.ndarray``.
* :py:const:`NumpyMatrix` - a 2D ``numpy.ndarray`` (never a ``numpy.matrix``).
* :py:const:`CompressedMatrix` - a CSR or CSC scipy sparse matrix.

A :py:const:`ProperMatrix` is either of the last two, and the computations in
:py:mod:`scqc.utilities.computation` accept either.
"""

from typing import Any
from typing import Collection
from typing import Optional
from typing import Union

import numpy as np
import pandas as pd  # type: ignore
import scipy.sparse as sp  # type: ignore

__all__ = [
    "Shaped",
    "Matrix",
    "ProperMatrix",
    "NumpyMatrix",
    "CompressedMatrix",
    "SparseMatrix",
    "PandasFrame",
    "Vector",
    "NumpyVector",
    "PandasSeries",
    "PER_OF_AXIS",
    "LAYOUT_OF_AXIS",
    "is_1d",
    "is_2d",
    "maybe_sparse_matrix",
    "maybe_compressed_matrix",
    "to_numpy_vector",
    "to_numpy_matrix",
    "to_proper_matrix",
    "to_pandas_series",
    "matrix_layout",
    "shaped_dtype",
]

#: Numpy 2-dimensional data.
#:
#: .. note::
#:
#:    This is not to be confused with ``numpy.matrix`` which must not be used, but is returned by the
#:    occasional function (e.g. summing a sparse matrix), and is immediately converted to a proper
#:    2-dimensional ``ndarray``.
NumpyMatrix = np.ndarray

#: Numpy 1-dimensional data.
NumpyVector = np.ndarray

#: Any scipy sparse 2-dimensional data.
SparseMatrix = Union[sp.spmatrix, sp.sparray] if hasattr(sp, "sparray") else sp.spmatrix

#: A CSR or CSC sparse matrix. Should have been ``scipy.sparse._compressed._cs_matrix``.
CompressedMatrix = Any

#: A pandas data frame.
PandasFrame = pd.DataFrame

#: A pandas series.
PandasSeries = pd.Series

#: 2-dimensional data we can efficiently operate on.
ProperMatrix = Union[NumpyMatrix, CompressedMatrix]

#: Any 2-dimensional data we know how to convert to a :py:const:`ProperMatrix`.
Matrix = Union[NumpyMatrix, SparseMatrix, PandasFrame]

#: Any 1-dimensional data we know how to convert to a :py:const:`NumpyVector`.
Vector = Union[NumpyVector, PandasSeries, Collection[Any]]

#: Any 1- or 2-dimensional data.
Shaped = Union[Matrix, Vector]

#: The name of each axis of a matrix, when operating "per" element of that axis.
PER_OF_AXIS = ("row", "column")

#: The matrix layout that makes operating on each axis efficient.
LAYOUT_OF_AXIS = ("row_major", "column_major")


def is_1d(shaped: Any) -> bool:
    """
    Test whether the data is 1-dimensional.
    """
    return getattr(shaped, "ndim", 1 if isinstance(shaped, (list, tuple)) else 0) == 1


def is_2d(shaped: Any) -> bool:
    """
    Test whether the data is 2-dimensional.
    """
    return getattr(shaped, "ndim", 0) == 2


def maybe_sparse_matrix(shaped: Any) -> Optional[SparseMatrix]:
    """
    Return the data as a sparse matrix if it is one, ``None`` otherwise.
    """
    if sp.issparse(shaped):
        return shaped
    return None


def maybe_compressed_matrix(shaped: Any) -> Optional[CompressedMatrix]:
    """
    Return the data as a CSR/CSC sparse matrix if it is one, ``None`` otherwise.
    """
    if sp.issparse(shaped) and shaped.format in ("csr", "csc"):
        return shaped
    return None


def to_numpy_vector(shaped: Any, *, copy: bool = False) -> NumpyVector:
    """
    Convert some 1D data (or 2D data with a single row or column) to a 1D numpy array.

    If ``copy``, the result is guaranteed not to share memory with the input.
    """
    if isinstance(shaped, pd.Series):
        values = shaped.to_numpy()
    elif isinstance(shaped, pd.Index):
        values = shaped.to_numpy()
    elif sp.issparse(shaped):
        assert 1 in shaped.shape
        values = shaped.toarray()
        copy = False
    else:
        values = np.asarray(shaped)

    if values.ndim == 2:
        assert 1 in values.shape
        values = np.asarray(values).reshape(-1)

    assert values.ndim == 1
    if copy:
        values = values.copy()
    return values


def to_numpy_matrix(shaped: Any, *, copy: bool = False) -> NumpyMatrix:
    """
    Convert some 2D data to a dense 2D numpy array.

    If ``copy``, the result is guaranteed not to share memory with the input.
    """
    if sp.issparse(shaped):
        return shaped.toarray()

    if isinstance(shaped, pd.DataFrame):
        dense = shaped.to_numpy()
    else:
        dense = np.asarray(shaped)

    assert dense.ndim == 2
    if copy:
        dense = dense.copy()
    return dense


def to_proper_matrix(shaped: Any, *, default_layout: str = "row_major") -> ProperMatrix:
    """
    Convert some 2D data to either a dense numpy array or a compressed sparse matrix.

    Sparse data in other formats is converted to CSR if ``default_layout`` is ``row_major``, or to CSC
    if it is ``column_major``.
    """
    assert default_layout in LAYOUT_OF_AXIS
    if sp.issparse(shaped):
        if shaped.format in ("csr", "csc"):
            return shaped
        if default_layout == "row_major":
            return shaped.tocsr()
        return shaped.tocsc()
    return to_numpy_matrix(shaped)


def to_pandas_series(vector: Any, *, index: Optional[Collection[Any]] = None) -> PandasSeries:
    """
    Convert some 1D data to a pandas series with the specified ``index``.
    """
    return pd.Series(to_numpy_vector(vector), index=index)


def matrix_layout(matrix: Any) -> Optional[str]:
    """
    Return the layout of a 2D matrix (``row_major`` or ``column_major``), or ``None`` if it is a sparse
    matrix in some other format.
    """
    sparse = maybe_sparse_matrix(matrix)
    if sparse is not None:
        if sparse.format == "csr":
            return "row_major"
        if sparse.format == "csc":
            return "column_major"
        return None

    dense = to_numpy_matrix(matrix)
    if dense.flags.c_contiguous:
        return "row_major"
    if dense.flags.f_contiguous:
        return "column_major"
    return None


def shaped_dtype(shaped: Any) -> str:
    """
    Return the data type of the elements of some shaped data.
    """
    if isinstance(shaped, pd.DataFrame):
        return str(shaped.to_numpy().dtype)
    return str(getattr(shaped, "dtype", np.asarray(shaped).dtype))
