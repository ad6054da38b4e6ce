"""
Defaults
--------
"""

from typing import Tuple

#: The number of scaled median absolute deviations from the median beyond which a value is an
#: outlier. See :py:func:`scqc.tools.outliers.find_mad_outliers`.
outliers_nmads: float = 3.0

#: The scale of the median absolute deviation, which makes it a consistent estimator of the standard
#: deviation for normally distributed data. See :py:func:`scqc.tools.outliers.find_mad_outliers`.
outliers_mad_scale: float = 1.4826

#: The default side(s) on which to look for outliers. See
#: :py:func:`scqc.tools.outliers.find_mad_outliers`.
outliers_direction: str = "both"

#: Whether to look for outliers on the log of the metric by default. See
#: :py:func:`scqc.tools.outliers.find_mad_outliers`.
outliers_log: bool = False

#: Whether to look for library size outliers on the log of the total counts. See
#: :py:func:`scqc.pipeline.clean.analyze_clean_cells`.
sum_outliers_log: bool = True

#: Whether to look for detected genes outliers on the log of the number of detected genes. See
#: :py:func:`scqc.pipeline.clean.analyze_clean_cells`.
detected_outliers_log: bool = True

#: The regular expression patterns of the mitochondrial gene symbols. See
#: :py:func:`scqc.pipeline.clean.analyze_clean_cells`.
mitochondrial_gene_patterns: Tuple[str, ...] = ("MT-.*",)

#: The regular expression patterns of the spike-in identifiers. See
#: :py:func:`scqc.pipeline.clean.analyze_clean_cells`.
spike_in_gene_patterns: Tuple[str, ...] = ("ERCC-.*",)

#: The minimal number of cells a gene must be detected in to be kept. See
#: :py:func:`scqc.tools.properly_sampled.find_properly_sampled_genes`.
properly_sampled_min_cells: int = 1

#: The count a gene must exceed in a cell to be detected in it. See
#: :py:func:`scqc.tools.properly_sampled.find_properly_sampled_genes`.
properly_sampled_detection_limit: float = 0

#: The minimal number of cells in each group of cells used for pooling. See
#: :py:func:`scqc.tools.clustering.merge_small_groups`
#: and
#: :py:func:`scqc.tools.normalize.compute_pooled_size_factors`.
min_group_size: int = 20

#: The number of cells in each pool used to estimate the size factors. Pools larger than the group
#: they are taken from are skipped. See :py:func:`scqc.tools.normalize.compute_pooled_size_factors`.
pool_sizes: Tuple[int, ...] = (5, 10, 15, 20, 25, 30, 40, 50, 60, 80, 100)

#: The weight of the per-cell equation, relative to the per-pool equations, when deconvolving the
#: pool factors. See :py:func:`scqc.tools.normalize.compute_pooled_size_factors`.
deconvolution_cell_weight: float = 1e-6

#: The tolerance (relative change) for stopping the iterative least squares deconvolution. See
#: :py:func:`scqc.tools.normalize.compute_pooled_size_factors`.
deconvolution_tolerance: float = 1e-8

#: The maximal number of iterations of the iterative least squares deconvolution. See
#: :py:func:`scqc.tools.normalize.compute_pooled_size_factors`.
deconvolution_max_iterations: int = 5000

#: How to center the size factors (``mean`` or ``median``). See
#: :py:func:`scqc.tools.normalize.compute_pooled_size_factors`
#: and
#: :py:func:`scqc.tools.normalize.compute_library_size_factors`.
size_factors_center: str = "mean"

#: The number of (truncated SVD) components to use when clustering cells. See
#: :py:class:`scqc.tools.clustering.LeidenClustering`.
clustering_components: int = 20

#: The number of nearest neighbors of each cell when clustering cells. See
#: :py:class:`scqc.tools.clustering.LeidenClustering`.
clustering_knn_k: int = 15

#: The resolution of the Leiden partition when clustering cells. See
#: :py:class:`scqc.tools.clustering.LeidenClustering`.
clustering_resolution: float = 1.0

#: The base of the log-transformed assays. See :py:mod:`scqc.tools.normalize`.
log_base: float = 2

#: The pseudo-count added before log-transforming the assays. See :py:mod:`scqc.tools.normalize`.
log_normalization: float = 1

#: The scale of "counts per million". See :py:func:`scqc.tools.normalize.compute_log_cpm`.
cpm_scale: float = 1e6

#: The generic random seed. A non-zero value gives replicable results (the default), while ``0``
#: makes for a different result each time the code is run. See
#: :py:class:`scqc.tools.clustering.LeidenClustering`.
random_seed: int = 123456
