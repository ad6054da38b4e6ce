"""
Clustering
----------

Pooled size factors estimation assumes most genes are not differentially expressed between the
cells of each pool. To make this a reasonable assumption for heterogeneous data, we first split the
cells into coarse groups of similar cells, and only pool cells within each group.

The clustering method is pluggable. Any object with a ``cluster(profiles)`` method, which takes the
(cells × genes) matrix of log-normalized profiles and returns a group index per cell, will do. We
provide :py:class:`LeidenClustering` (the default), :py:class:`SingleGroupClustering` (pool all the
cells together) and :py:class:`FixedGroupsClustering` (use some external annotation, e.g. the
batch).

Regardless of the method, :py:func:`merge_small_groups` ensures no group is smaller than the
minimal group size (unless there is only a single group).
"""

from typing import Optional
from typing import Protocol
from typing import Union

import numpy as np
import scipy.sparse.linalg as sla  # type: ignore

import scqc.parameters as pr
import scqc.utilities as ut

__all__ = [
    "ClusteringStrategy",
    "LeidenClustering",
    "SingleGroupClustering",
    "FixedGroupsClustering",
    "compute_cell_profiles",
    "merge_small_groups",
    "find_pooling_groups",
]


class ClusteringStrategy(Protocol):
    """
    A method for clustering cells into coarse groups.
    """

    def cluster(self, profiles: ut.NumpyMatrix) -> ut.NumpyVector:
        """
        Given the (cells × genes) log-normalized ``profiles``, return the (non-negative) group index of
        each cell.
        """


class SingleGroupClustering:
    """
    Put all the cells in a single group.
    """

    def cluster(self, profiles: ut.NumpyMatrix) -> ut.NumpyVector:  # pylint: disable=missing-function-docstring
        return np.zeros(profiles.shape[0], dtype="int64")


class FixedGroupsClustering:
    """
    Use pre-computed ``groups`` (e.g., the batch or the individual of each cell). These can be any
    labels; missing labels are not allowed.
    """

    def __init__(self, groups: ut.Vector) -> None:
        self.groups = ut.to_numpy_vector(groups)

    def cluster(self, profiles: ut.NumpyMatrix) -> ut.NumpyVector:  # pylint: disable=missing-function-docstring
        if len(self.groups) != profiles.shape[0]:
            raise ut.DimensionMismatch(
                f"fixed groups size: {len(self.groups)} does not match: {profiles.shape[0]} cells"
            )
        codes, _labels = ut.PandasSeries(self.groups).factorize()
        codes = np.asarray(codes, dtype="int64")
        if np.any(codes < 0):
            raise ut.DegenerateInput(f"missing fixed groups for: {int(np.sum(codes < 0))} cells")
        return codes


class LeidenClustering:
    """
    Cluster the cells using the Leiden algorithm on a K-nearest-neighbors graph.

    The profiles are centered and reduced to (at most) ``components`` dimensions using a truncated
    SVD. Each cell is connected to its ``k`` nearest (Euclidean) neighbors in the reduced space, and
    the graph is partitioned using :py:func:`scqc.utilities.partition.leiden_partition` with the
    specified ``resolution`` and ``random_seed``.
    """

    def __init__(
        self,
        *,
        components: int = pr.clustering_components,
        k: int = pr.clustering_knn_k,
        resolution: float = pr.clustering_resolution,
        random_seed: int = pr.random_seed,
    ) -> None:
        self.components = components
        self.k = k
        self.resolution = resolution
        self.random_seed = random_seed

    def cluster(self, profiles: ut.NumpyMatrix) -> ut.NumpyVector:  # pylint: disable=missing-function-docstring
        reduced = self.reduce(profiles)
        if reduced is None:
            return np.zeros(profiles.shape[0], dtype="int64")

        edge_weights = ut.knn_edge_weights(reduced, k=self.k)
        return ut.leiden_partition(
            edge_weights=edge_weights, resolution=self.resolution, random_seed=self.random_seed
        )

    @ut.timed_call("truncated_svd")
    def reduce(self, profiles: ut.NumpyMatrix) -> Optional[ut.NumpyMatrix]:
        """
        Return the profiles reduced to (at most) ``components`` dimensions, or ``None`` if the
        profiles have no variance to reduce.
        """
        centered = profiles - np.mean(profiles, axis=0)[None, :]
        if not np.any(np.abs(centered) > 1e-12):
            return None

        components = min(self.components, min(centered.shape) - 1)
        if components < 1:
            return centered

        if centered.size <= 10_000_000:
            left, singular, _right = np.linalg.svd(centered, full_matrices=False)
        else:
            start = np.random.default_rng(self.random_seed or None).uniform(size=min(centered.shape))
            left, singular, _right = sla.svds(centered, k=components, v0=start)
            order = np.argsort(-singular)
            left = left[:, order]
            singular = singular[order]

        return left[:, :components] * singular[None, :components]


@ut.timed_call()
@ut.expand_doc()
def compute_cell_profiles(store: ut.MatrixStore, what: str = "counts") -> ut.NumpyMatrix:
    """
    Compute the dense (cells × genes) log-normalized profiles of the ``what`` (default: {what})
    data, used for clustering the cells.

    Each cell is scaled to the mean total of all the cells, followed by ``log2(x + 1)``.
    """
    counts = ut.get_vo_proper(store, what, layout="row_major")
    sums = ut.sum_per(counts, per="row").astype("float64")
    normalized = ut.fraction_by(counts, sums=sums / np.mean(sums), by="row")
    return ut.log_data(ut.to_numpy_matrix(normalized), base=2, normalization=1)


@ut.timed_call()
@ut.expand_doc()
def merge_small_groups(
    profiles: ut.NumpyMatrix,
    groups: ut.Vector,
    *,
    min_group_size: int = pr.min_group_size,
) -> ut.NumpyVector:
    """
    Given the (cells × genes) ``profiles`` and the group index of each cell, merge groups smaller
    than ``min_group_size`` (default: {min_group_size}) into other groups.

    Repeatedly, the smallest group is merged into the group whose centroid (mean profile) is most
    correlated with its own centroid, until no group is smaller than the minimal size, or only a
    single group remains. Returns the consecutive group index of each cell.
    """
    groups = ut.compress_indices(groups)
    assert np.all(groups >= 0)

    while True:
        sizes = np.bincount(groups)
        if len(sizes) <= 1:
            break

        smallest = int(np.argmin(sizes))
        if sizes[smallest] >= min_group_size:
            break

        summed, counts = ut.sum_groups(profiles, groups, per="row")  # type: ignore
        centroids = summed / counts[:, None]
        with np.errstate(divide="ignore", invalid="ignore"):
            correlations = np.corrcoef(centroids)[smallest, :]
        correlations = np.where(np.isnan(correlations), -np.inf, correlations)
        correlations[smallest] = -np.inf
        if np.all(np.isinf(correlations)):
            sizes_of_others = sizes.copy()
            sizes_of_others[smallest] = -1
            target = int(np.argmax(sizes_of_others))
        else:
            target = int(np.argmax(correlations))

        if ut.logging_calc():
            ut.log_calc(f"merge group {smallest} of size {sizes[smallest]} into group {target}")

        groups = ut.compress_indices(np.where(groups == smallest, target, groups))

    return groups


@ut.logged()
@ut.timed_call()
@ut.expand_doc()
def find_pooling_groups(
    store: ut.MatrixStore,
    what: str = "counts",
    *,
    clustering: Union[ClusteringStrategy, str, None] = None,
    min_group_size: int = pr.min_group_size,
    to: Optional[str] = "size_factor_group",
) -> Optional[ut.PandasSeries]:
    """
    Split the cells into coarse groups for pooling.

    **Input**

    A :py:class:`scqc.utilities.annotation.MatrixStore`.

    **Returns**

    Cell Annotations
        ``to`` (default: {to})
            The (consecutive, non-negative) group index of each cell.

    If ``to`` is ``None``, this is returned as a pandas series (indexed by the cell identifiers)
    instead.

    **Computation Parameters**

    1. If there are fewer than twice ``min_group_size`` (default: {min_group_size}) cells, place
       all of them in a single group.

    2. Otherwise, compute the log-normalized profiles of the ``what`` (default: {what}) data (see
       :py:func:`compute_cell_profiles`), and invoke the ``clustering`` strategy on them. If it is a
       string, it is the name of a per-cell annotation used by a :py:class:`FixedGroupsClustering`.
       By default, use a :py:class:`LeidenClustering`.

    3. Invoke :py:func:`merge_small_groups` to ensure no group is smaller than ``min_group_size``.
    """
    if isinstance(clustering, str):
        clustering = FixedGroupsClustering(ut.get_o_numpy(store, clustering))

    if store.n_cells < 2 * min_group_size:
        groups = np.zeros(store.n_cells, dtype="int64")
    else:
        profiles = compute_cell_profiles(store, what)
        strategy = clustering or LeidenClustering()
        groups = ut.compress_indices(strategy.cluster(profiles))
        if ut.logging_calc():
            ut.log_calc("clustered groups", groups, formatter=ut.groups_description)
        groups = merge_small_groups(profiles, groups, min_group_size=min_group_size)

    if to is None:
        ut.log_return("groups", groups, formatter=ut.groups_description)
        return ut.to_pandas_series(groups, index=store.cell_ids)

    ut.set_o_data(store, to, groups, formatter=ut.groups_description)
    return None
