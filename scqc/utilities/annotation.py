"""
Annotation
----------

A :py:class:`MatrixStore` holds a count matrix together with its per-gene and per-cell metadata
tables, and any derived assays (log-transformed or normalized matrices) of the same shape.

Orientation
...........

The public interface of the store follows the usual bulk RNA convention of genes × cells, that is,
``store.shape == (n_genes, n_cells)``, and :py:meth:`MatrixStore.add_assay` and
:py:meth:`MatrixStore.get_assay` take and return genes × cells matrices.

Internally, the data is held in an ``AnnData`` object, which uses the opposite (cells × genes)
convention: the observations are cells and the variables are genes. The accessor functions in this
module operate on the internal orientation, and are named after the ``AnnData`` members:

* ``o`` - per-observation (per-cell) data, held in ``obs``.
* ``v`` - per-variable (per-gene) data, held in ``var``.
* ``vo`` - per-variable-per-observation data (cells × genes matrices), held in ``X`` (the
  ``counts``) and ``layers`` (any other assay).
* ``m`` - unstructured data, held in ``uns``. This holds audit information such as outlier
  thresholds and fallback records.

Data Access
...........

The accessors return deterministic usable data types (numpy vectors, proper matrices), fail with
:py:class:`scqc.utilities.errors.NotFound` for missing data and with
:py:class:`scqc.utilities.errors.DimensionMismatch` when setting data of the wrong size, rather than
letting pandas or anndata silently broadcast, align, or truncate.

A side benefit of exclusively using the accessors is that they participate in the automated logging
provided by the :py:mod:`scqc.utilities.logging` module: writing the final results into a top-level
store is logged at the ``INFO`` level, while lower logging levels give insight into the exact data
being read and written by nested steps.

Subsetting
..........

The store is never sliced in-place. :py:meth:`MatrixStore.subset_rows` and
:py:meth:`MatrixStore.subset_cols` (and :py:func:`slice`) return a new store whose count matrix,
assays and metadata tables were all filtered identically, preserving the original relative order.
"""

from typing import Any
from typing import Callable
from typing import Collection
from typing import List
from typing import Optional
from typing import Union

import numpy as np
import pandas as pd  # type: ignore
from anndata import AnnData  # type: ignore

import scqc.utilities.computation as utc
import scqc.utilities.errors as ute
import scqc.utilities.logging as utl
import scqc.utilities.timing as utm
import scqc.utilities.typing as utt

__all__ = [
    "MatrixStore",
    "COUNTS",
    "slice",
    "set_name",
    "get_name",
    "has_data",
    "set_m_data",
    "get_m_data",
    "set_o_data",
    "get_o_series",
    "get_o_numpy",
    "set_v_data",
    "get_v_numpy",
    "get_v_names",
    "set_vo_data",
    "get_vo_proper",
]

#: The name of the active count matrix assay.
COUNTS = "counts"


class MatrixStore:
    """
    A genes × cells count matrix, with aligned per-gene and per-cell metadata tables and assays.

    The ``counts`` may be a dense or ``scipy.sparse`` matrix of non-negative values, whose rows are
    the genes (identified by the unique ``gene_ids``) and whose columns are the cells (identified by
    the unique ``cell_ids``).

    The optional ``genes`` and ``cells`` data frames hold external annotations (gene symbols, cell
    individual, batch, replicate, ...). They must either be indexed by the identifiers (in any order)
    or have exactly one row per gene (cell) in the input order.

    The optional ``name`` is used in log messages.
    """

    def __init__(
        self,
        counts: utt.Matrix,
        *,
        gene_ids: Collection[str],
        cell_ids: Collection[str],
        genes: Optional[utt.PandasFrame] = None,
        cells: Optional[utt.PandasFrame] = None,
        name: Optional[str] = None,
    ) -> None:
        gene_ids = [str(gene_id) for gene_id in gene_ids]
        cell_ids = [str(cell_id) for cell_id in cell_ids]

        if not utt.is_2d(counts) or tuple(counts.shape) != (len(gene_ids), len(cell_ids)):
            raise ute.DimensionMismatch(
                f"count matrix shape: {getattr(counts, 'shape', None)} "
                f"does not match: {len(gene_ids)} gene ids X {len(cell_ids)} cell ids"
            )

        _ensure_unique("gene", gene_ids)
        _ensure_unique("cell", cell_ids)

        sparse = utt.maybe_sparse_matrix(counts)
        if sparse is not None:
            cells_by_genes: utt.ProperMatrix = utc.to_layout(sparse.T, "row_major")
            negative = sparse.nnz > 0 and bool(np.min(sparse.data) < 0)
        else:
            dense = utt.to_numpy_matrix(counts)
            cells_by_genes = np.ascontiguousarray(dense.T)
            negative = dense.size > 0 and bool(np.min(dense) < 0)

        if negative:
            raise ute.DegenerateInput("the count matrix contains negative values")

        adata = AnnData(cells_by_genes)
        adata.obs_names = cell_ids
        adata.var_names = gene_ids

        if genes is not None:
            adata.var = _aligned_frame("gene", genes, adata.var_names)
        if cells is not None:
            adata.obs = _aligned_frame("cell", cells, adata.obs_names)

        self._adata = adata
        #: Whether this store is returned to the top-level caller (used for logging).
        self.is_top_level: Optional[bool] = None
        set_name(self, name)

    @classmethod
    def from_anndata(cls, adata: AnnData, *, name: Optional[str] = None) -> "MatrixStore":
        """
        Wrap a copy of an existing ``adata``, whose observations are cells and variables are genes,
        and whose ``X`` holds the counts.
        """
        store = cls.__new__(cls)
        store._adata = adata.copy()
        store.is_top_level = None
        _ensure_unique("gene", list(adata.var_names))
        _ensure_unique("cell", list(adata.obs_names))
        set_name(store, name if name is not None else adata.uns.get("__name__"))
        return store

    @property
    def adata(self) -> AnnData:
        """
        The underlying (cells × genes) ``AnnData``. Modify it only through the accessors.
        """
        return self._adata

    @property
    def name(self) -> Optional[str]:
        """
        The name of the store (for log messages), if any.
        """
        return self._adata.uns.get("__name__")

    @property
    def n_genes(self) -> int:
        """
        The number of genes (rows of the count matrix).
        """
        return self._adata.n_vars

    @property
    def n_cells(self) -> int:
        """
        The number of cells (columns of the count matrix).
        """
        return self._adata.n_obs

    @property
    def shape(self) -> tuple:
        """
        The (genes, cells) shape of the count matrix and of every assay.
        """
        return (self.n_genes, self.n_cells)

    @property
    def gene_ids(self) -> List[str]:
        """
        The gene identifiers, in order.
        """
        return list(self._adata.var_names)

    @property
    def cell_ids(self) -> List[str]:
        """
        The cell identifiers, in order.
        """
        return list(self._adata.obs_names)

    @property
    def genes(self) -> utt.PandasFrame:
        """
        A copy of the per-gene metadata table, indexed by the gene identifiers.
        """
        return self._adata.var.copy()

    @property
    def cells(self) -> utt.PandasFrame:
        """
        A copy of the per-cell metadata table, indexed by the cell identifiers.
        """
        return self._adata.obs.copy()

    @property
    def assay_names(self) -> List[str]:
        """
        The names of all the assays, starting with the ``counts``.
        """
        return [COUNTS] + list(self._adata.layers.keys())

    @property
    def counts(self) -> utt.ProperMatrix:
        """
        The genes × cells count matrix.
        """
        return self.get_assay(COUNTS)

    def add_assay(self, name: str, matrix: utt.Matrix) -> None:
        """
        Add (or replace) a genes × cells assay derived from the counts, such as log-normalized values.

        Raises :py:class:`scqc.utilities.errors.DimensionMismatch` if the ``matrix`` shape differs from
        the store shape.
        """
        if not utt.is_2d(matrix) or tuple(matrix.shape) != self.shape:
            raise ute.DimensionMismatch(
                f"assay: {name} shape: {getattr(matrix, 'shape', None)} "
                f"does not match the count matrix shape: {self.shape} of the store: {self.name or 'unnamed'}"
            )
        set_vo_data(self, name, utt.to_proper_matrix(matrix.T))

    def get_assay(self, name: str) -> utt.ProperMatrix:
        """
        Return a genes × cells assay by its ``name`` (``counts`` for the count matrix).

        Raises :py:class:`scqc.utilities.errors.NotFound` if there is no such assay.
        """
        return get_vo_proper(self, name).T

    def subset_rows(self, keep: Union[Collection[str], utt.NumpyVector]) -> "MatrixStore":
        """
        Return a new store with only the genes in ``keep`` (identifiers or a boolean mask), in their
        original relative order.

        Raises :py:class:`scqc.utilities.errors.NotFound` if some identifier is not in the store.
        """
        return slice(self, genes=_keep_mask("gene", keep, self._adata.var_names))

    def subset_cols(self, keep: Union[Collection[str], utt.NumpyVector]) -> "MatrixStore":
        """
        Return a new store with only the cells in ``keep`` (identifiers or a boolean mask), in their
        original relative order.

        Raises :py:class:`scqc.utilities.errors.NotFound` if some identifier is not in the store.
        """
        return slice(self, cells=_keep_mask("cell", keep, self._adata.obs_names))

    def to_anndata(self) -> AnnData:
        """
        Return a copy of the data as a (cells × genes) ``AnnData``, for persisting it in any container
        the host application chooses.
        """
        return self._adata.copy()

    def __repr__(self) -> str:
        return f"MatrixStore({self.name or 'unnamed'}: {self.n_genes} genes X {self.n_cells} cells)"


def _ensure_unique(kind: str, ids: List[str]) -> None:
    series = pd.Series(ids)
    duplicated = series[series.duplicated()]
    if len(duplicated) > 0:
        raise ute.DegenerateInput(f"duplicate {kind} ids: {ute.describe_names(sorted(set(duplicated)))}")


def _aligned_frame(kind: str, frame: utt.PandasFrame, ids: pd.Index) -> utt.PandasFrame:
    if frame.index.isin(ids).all() and len(frame.index) == len(ids):
        return frame.reindex(ids)

    if isinstance(frame.index, pd.RangeIndex) and len(frame.index) == len(ids):
        frame = frame.copy()
        frame.index = ids
        return frame

    missing = [str(name) for name in ids if name not in frame.index]
    if len(missing) > 0 and len(frame.index) != len(ids):
        raise ute.DimensionMismatch(
            f"the {kind} metadata has: {len(frame.index)} rows instead of: {len(ids)} "
            f"(missing {kind} ids: {ute.describe_names(missing)})"
        )
    raise ute.NotFound(f"the {kind} metadata is missing the {kind} ids: {ute.describe_names(missing)}")


def _keep_mask(kind: str, keep: Any, ids: pd.Index) -> utt.NumpyVector:
    if utt.is_1d(keep) and utt.shaped_dtype(keep) == "bool":
        mask = utt.to_numpy_vector(keep)
        if len(mask) != len(ids):
            raise ute.DimensionMismatch(f"{kind} mask size: {len(mask)} does not match: {len(ids)} {kind}s")
        return mask

    keep_set = {str(name) for name in keep}
    mask = ids.isin(list(keep_set))
    if int(np.sum(mask)) != len(keep_set):
        known = set(ids)
        raise ute.NotFound(f"unknown {kind} ids: {ute.describe_names(sorted(keep_set - known))}")
    return np.asarray(mask)


@utm.timed_call()
def slice(  # pylint: disable=redefined-builtin
    store: MatrixStore,
    *,
    name: Optional[str] = None,
    cells: Optional[utt.Vector] = None,
    genes: Optional[utt.Vector] = None,
    track_cells: Optional[str] = None,
    track_genes: Optional[str] = None,
    top_level: bool = True,
) -> MatrixStore:
    """
    Return a new store which includes a subset of the full ``store``.

    If ``name`` is not specified, the new store keeps the original name. Otherwise, if it starts with
    a ``.``, it will be appended to the current name (if any). Otherwise, ``name`` is the new name.

    The ``cells`` and/or ``genes`` should be boolean masks of the elements to keep. The count matrix,
    all the assays, and both metadata tables are sliced together, preserving the original order.

    If ``track_cells`` and/or ``track_genes`` are specified, the index of each kept cell and/or gene
    in the full ``store`` is stored as a per-cell and/or per-gene annotation of the result.
    """
    adata = store.adata
    if cells is None:
        cells = np.full(adata.n_obs, True)
    if genes is None:
        genes = np.full(adata.n_vars, True)

    cells = utt.to_numpy_vector(cells)
    genes = utt.to_numpy_vector(genes)
    if len(cells) != adata.n_obs or len(genes) != adata.n_vars:
        raise ute.DimensionMismatch(
            f"slice masks sizes: {len(cells)} cells X {len(genes)} genes "
            f"do not match the store: {store.n_cells} cells X {store.n_genes} genes"
        )

    with utm.timed_step("adata.slice"):
        utm.timed_parameters(cells=int(np.sum(cells)), genes=int(np.sum(genes)))
        bdata = adata[cells, :][:, genes].copy()

    result = MatrixStore.__new__(MatrixStore)
    result._adata = bdata  # pylint: disable=protected-access
    result.is_top_level = None
    set_name(result, store.name)
    set_name(result, name)

    if top_level:
        utl.top_level(result)

    if track_cells is not None:
        set_o_data(result, track_cells, np.where(cells)[0])
    if track_genes is not None:
        set_v_data(result, track_genes, np.where(genes)[0])

    if utl.logging_calc():
        utl.log_calc(f"slice {get_name(store, 'unnamed')} into {get_name(result, 'unnamed')} shape {result.shape}")

    return result


def set_name(store: MatrixStore, name: Optional[str]) -> None:
    """
    Set the ``name`` of the store (for log messages).

    If the name starts with ``.`` it is appended to the current name, if any.
    """
    uns = store.adata.uns
    if name is None:
        return

    if name[0] == ".":
        old_name = get_name(store)
        if old_name is None:
            name = name[1:]
        else:
            name = old_name + name
    uns["__name__"] = name


def get_name(store: MatrixStore, default: Optional[str] = None) -> Optional[str]:
    """
    Return the name of the store (for log messages), if any.

    If no name was set, returns the ``default``.
    """
    return store.adata.uns.get("__name__", default)


def has_data(store: MatrixStore, name: str) -> bool:
    """
    Test whether we have the specified data (assay, per-cell, per-gene or unstructured).
    """
    adata = store.adata
    if name == COUNTS:
        return True
    for annotations in (adata.layers, adata.obs, adata.var, adata.uns):
        if name in annotations:
            return True
    return False


def set_m_data(
    store: MatrixStore, name: str, data: Any, *, formatter: Optional[Callable[[Any], Any]] = None
) -> None:
    """
    Set unstructured (audit) data.
    """
    utl.log_set(store, "m", name, data, formatter=formatter)
    store.adata.uns[name] = data


def get_m_data(store: MatrixStore, name: str, *, formatter: Optional[Callable[[Any], Any]] = None) -> Any:
    """
    Get unstructured (audit) data by its ``name``.
    """
    if name not in store.adata.uns:
        raise _unknown_data(store, name, "m")
    data = store.adata.uns[name]
    utl.log_get(store, "m", name, data, formatter=formatter)
    return data


def set_o_data(
    store: MatrixStore, name: str, data: utt.Vector, *, formatter: Optional[Callable[[Any], Any]] = None
) -> None:
    """
    Set per-observation (cell) data.

    If ``formatter`` is specified, its results is used when logging the operation.
    """
    data = utt.to_numpy_vector(data)
    if len(data) != store.n_cells:
        raise ute.DimensionMismatch(
            f"per-cell data: {name} size: {len(data)} does not match: {store.n_cells} cells "
            f"of the store: {store.name or 'unnamed'}"
        )
    utl.log_set(store, "o", name, data, formatter=formatter)
    store.adata.obs[name] = data


def set_v_data(
    store: MatrixStore, name: str, data: utt.Vector, *, formatter: Optional[Callable[[Any], Any]] = None
) -> None:
    """
    Set per-variable (gene) data.

    If ``formatter`` is specified, its results is used when logging the operation.
    """
    data = utt.to_numpy_vector(data)
    if len(data) != store.n_genes:
        raise ute.DimensionMismatch(
            f"per-gene data: {name} size: {len(data)} does not match: {store.n_genes} genes "
            f"of the store: {store.name or 'unnamed'}"
        )
    utl.log_set(store, "v", name, data, formatter=formatter)
    store.adata.var[name] = data


def set_vo_data(
    store: MatrixStore, name: str, data: utt.Matrix, *, formatter: Optional[Callable[[Any], Any]] = None
) -> None:
    """
    Set per-variable-per-observation (cells × genes) data.

    The ``counts`` can't be replaced; any other name is an assay.
    """
    if name == COUNTS:
        raise ValueError(f"can't replace the {COUNTS} of the store: {store.name or 'unnamed'}")
    if tuple(data.shape) != (store.n_cells, store.n_genes):
        raise ute.DimensionMismatch(
            f"assay: {name} shape: {data.shape} does not match: {store.n_cells} cells X {store.n_genes} genes "
            f"of the store: {store.name or 'unnamed'}"
        )
    utl.log_set(store, "vo", name, data, formatter=formatter)
    store.adata.layers[name] = data


def get_vo_proper(store: MatrixStore, name: str = COUNTS, *, layout: Optional[str] = None) -> utt.ProperMatrix:
    """
    Get per-variable-per-observation (cells × genes) data by its ``name`` (by default, the
    ``counts``) as a proper matrix.

    If ``layout`` (``row_major`` or ``column_major``) is specified, the data is returned in this
    layout.
    """
    adata = store.adata
    if name == COUNTS:
        data = adata.X
    elif name in adata.layers:
        data = adata.layers[name]
    else:
        raise _unknown_data(store, name, "vo")

    proper = utt.to_proper_matrix(data)
    if layout is not None:
        proper = utc.to_layout(proper, layout)
    utl.log_get(store, "vo", name, proper)
    return proper


def _get_o_data(store: MatrixStore, name: Union[str, utt.Vector], *, sum: bool) -> utt.NumpyVector:
    # pylint: disable=redefined-builtin
    if not isinstance(name, str):
        data = utt.to_numpy_vector(name)
        if len(data) != store.n_cells:
            raise ute.DimensionMismatch(f"per-cell data size: {len(data)} does not match: {store.n_cells} cells")
        return data

    if sum:
        return utc.sum_per(get_vo_proper(store, name, layout="row_major"), per="row")

    if name not in store.adata.obs:
        raise _unknown_data(store, name, "o")
    return utt.to_numpy_vector(store.adata.obs[name])


def get_o_numpy(
    store: MatrixStore,
    name: Union[str, utt.Vector],
    *,
    sum: bool = False,  # pylint: disable=redefined-builtin
    formatter: Optional[Callable[[Any], Any]] = None,
) -> utt.NumpyVector:
    """
    Get per-observation (cell) data in the ``store`` by its ``name`` as a numpy array.

    If ``name`` is a string, it is the name of a per-cell annotation to fetch. Otherwise, it should be
    some vector of data of the appropriate size.

    If ``sum`` is ``True``, then ``name`` should be the name of an assay, and this will return the
    total of this data per cell.
    """
    data = _get_o_data(store, name, sum=sum)
    if formatter is None and sum:
        formatter = utl.sizes_description
    utl.log_get(store, "o", name if not sum else f"{name}|sum", data, formatter=formatter)
    return data


def get_o_series(
    store: MatrixStore,
    name: Union[str, utt.Vector],
    *,
    sum: bool = False,  # pylint: disable=redefined-builtin
    formatter: Optional[Callable[[Any], Any]] = None,
) -> utt.PandasSeries:
    """
    Same as :py:func:`get_o_numpy`, but return a pandas series indexed by the cell identifiers.
    """
    return utt.to_pandas_series(get_o_numpy(store, name, sum=sum, formatter=formatter), index=store.adata.obs_names)


def _get_v_data(store: MatrixStore, name: Union[str, utt.Vector], *, sum: bool) -> utt.NumpyVector:
    # pylint: disable=redefined-builtin
    if not isinstance(name, str):
        data = utt.to_numpy_vector(name)
        if len(data) != store.n_genes:
            raise ute.DimensionMismatch(f"per-gene data size: {len(data)} does not match: {store.n_genes} genes")
        return data

    if sum:
        return utc.sum_per(get_vo_proper(store, name, layout="column_major"), per="column")

    if name not in store.adata.var:
        raise _unknown_data(store, name, "v")
    return utt.to_numpy_vector(store.adata.var[name])


def get_v_numpy(
    store: MatrixStore,
    name: Union[str, utt.Vector],
    *,
    sum: bool = False,  # pylint: disable=redefined-builtin
    formatter: Optional[Callable[[Any], Any]] = None,
) -> utt.NumpyVector:
    """
    Get per-variable (gene) data in the ``store`` by its ``name`` as a numpy array.

    If ``name`` is a string, it is the name of a per-gene annotation to fetch. Otherwise, it should be
    some vector of data of the appropriate size.

    If ``sum`` is ``True``, then ``name`` should be the name of an assay, and this will return the
    total of this data per gene.
    """
    data = _get_v_data(store, name, sum=sum)
    if formatter is None and sum:
        formatter = utl.sizes_description
    utl.log_get(store, "v", name if not sum else f"{name}|sum", data, formatter=formatter)
    return data


def get_v_names(store: MatrixStore) -> utt.NumpyVector:
    """
    Get a numpy vector of the gene identifiers.
    """
    data = utt.to_numpy_vector(store.adata.var_names)
    utl.log_get(store, "v", "__name__", data)
    return data


def _unknown_data(store: MatrixStore, name: str, per: str) -> ute.NotFound:
    kind = dict(m="audit data", o="per-cell data", v="per-gene data", vo="assay")[per]
    return ute.NotFound(f"unknown {kind}: {name} in the store: {store.name or 'unnamed'}")
