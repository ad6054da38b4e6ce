"""
Partition
---------

Utilities for computing "good" partitions of a graph (typically a KNN-graph of cells). These are
just thin adapters for functions provided by external packages, specifically the ``leidenalg``
package (on top of ``igraph``). It should be "easy" to provide your own wrappers for other
algorithms, if needed.
"""

from typing import Tuple

import igraph as ig  # type: ignore
import leidenalg as la  # type: ignore
import numpy as np
import scipy.sparse as sp  # type: ignore

import scqc.utilities.computation as utc
import scqc.utilities.timing as utm
import scqc.utilities.typing as utt

__all__ = [
    "knn_edge_weights",
    "leiden_partition",
]


@utm.timed_call()
def knn_edge_weights(points: utt.NumpyMatrix, *, k: int) -> utt.CompressedMatrix:
    """
    Given a matrix of ``points`` (one per row), return a symmetric sparse matrix of edge weights
    connecting each point to its ``k`` nearest (Euclidean) neighbors.

    The weight of each edge is ``1 / (1 + distance)``, so identical points are connected with a
    weight of one.
    """
    points = utt.to_numpy_matrix(points).astype("float64")
    size = points.shape[0]
    k = min(k, size - 1)
    utm.timed_parameters(size=size, k=k)
    if k <= 0:
        return sp.csr_matrix((size, size), dtype="float64")

    squared = np.sum(points * points, axis=1)
    distances = squared[:, None] + squared[None, :] - 2 * (points @ points.T)
    np.maximum(distances, 0, out=distances)
    np.sqrt(distances, out=distances)
    np.fill_diagonal(distances, np.inf)

    neighbors = np.argsort(distances, axis=1, kind="stable")[:, :k]
    sources = np.repeat(np.arange(size), k)
    targets = neighbors.reshape(-1)
    weights = 1.0 / (1.0 + distances[sources, targets])

    edge_weights = sp.csr_matrix((weights, (sources, targets)), shape=(size, size))
    return edge_weights.maximum(edge_weights.T).tocsr()


@utm.timed_call("leiden")
def leiden_partition(
    *,
    edge_weights: utt.ProperMatrix,
    resolution: float = 1.0,
    random_seed: int = 0,
) -> utt.NumpyVector:
    """
    Use the Leiden algorithm from the ``leidenalg`` package to compute partitions, using the
    ``RBConfigurationVertexPartition`` goal function with the specified ``resolution``.

    Returns the consecutive (starting at zero) group index of each node.
    """
    graph, weights_array = _build_igraph(edge_weights)
    utm.timed_parameters(size=edge_weights.shape[0], edges=weights_array.size)

    partition = la.find_partition(
        graph,
        la.RBConfigurationVertexPartition,
        weights=weights_array,
        resolution_parameter=resolution,
        n_iterations=-1,
        seed=random_seed or None,
    )
    membership = np.array(partition.membership)
    return utc.compress_indices(membership)


def _build_igraph(edge_weights: utt.Matrix) -> Tuple[ig.Graph, utt.NumpyVector]:
    edge_weights = utt.to_proper_matrix(edge_weights)
    assert edge_weights.shape[0] == edge_weights.shape[1]
    size = edge_weights.shape[0]

    sources, targets = edge_weights.nonzero()
    upper = sources < targets
    sources = sources[upper]
    targets = targets[upper]
    weights_array = utt.to_numpy_vector(edge_weights[sources, targets]).astype("float64")

    graph = ig.Graph(directed=False)
    graph.add_vertices(size)
    graph.add_edges(list(zip(sources.tolist(), targets.tolist())))
    graph.es["weight"] = weights_array

    return graph, weights_array
