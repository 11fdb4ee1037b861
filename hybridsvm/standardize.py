"""
Per-feature standardization statistics.

Each partition streams its examples into a ``FeatureSummary``; summaries
are merged pairwise within a rank and then in a binomial tree across
ranks. The resulting standard deviations are broadcast and frozen
read-only on every rank.

References:
    Chan, Golub & LeVeque (1979). Updating formulae and a pairwise
    algorithm for computing sample variances.
"""

import time
import numpy as np

from .data import DatasetError
from .mpi_utils import tree_combine, tree_reduce, chunked_bcast


class FeatureSummary:
    """
    Streaming count, mean and variance of every feature.

    Only non-zero entries are folded in (Welford update on the non-zero
    values of each feature); implicit zeros are accounted for when the
    variance is read. ``merge`` is the pairwise update of Chan et al., so
    summaries can be combined in any order.

    Parameters
    ----------
    num_features : int
        Dimension of the feature vectors.
    """

    def __init__(self, num_features: int):
        self.num_features = num_features
        self.count = 0
        self.nnz = np.zeros(num_features, dtype=np.int64)
        self.mean_nz = np.zeros(num_features, dtype=np.float64)
        self.m2_nz = np.zeros(num_features, dtype=np.float64)

    def add(self, indices: np.ndarray, values: np.ndarray) -> "FeatureSummary":
        """Fold in one example given by its sparse indices and values."""
        self.count += 1
        nonzero = values != 0.0
        if not np.all(nonzero):
            indices, values = indices[nonzero], values[nonzero]
        if indices.size == 0:
            return self

        self.nnz[indices] += 1
        delta = values - self.mean_nz[indices]
        self.mean_nz[indices] += delta / self.nnz[indices]
        self.m2_nz[indices] += delta * (values - self.mean_nz[indices])
        return self

    def add_partition(self, partition) -> "FeatureSummary":
        """Fold in every example of a partition, in order."""
        for example in partition.examples():
            self.add(example.indices, example.values)
        return self

    def merge(self, other: "FeatureSummary") -> "FeatureSummary":
        """Merge ``other`` into this summary and return self."""
        if other.num_features != self.num_features:
            raise ValueError(
                f"Cannot merge summaries of {self.num_features} and {other.num_features} features"
            )
        if other.count == 0:
            return self
        if self.count == 0:
            self.count = other.count
            self.nnz = other.nnz.copy()
            self.mean_nz = other.mean_nz.copy()
            self.m2_nz = other.m2_nz.copy()
            return self

        n_a = self.nnz.astype(np.float64)
        n_b = other.nnz.astype(np.float64)
        n = n_a + n_b
        both = n > 0
        safe_n = np.where(both, n, 1.0)

        delta = other.mean_nz - self.mean_nz
        self.mean_nz = np.where(both, self.mean_nz + delta * n_b / safe_n, 0.0)
        self.m2_nz = self.m2_nz + other.m2_nz + np.where(both, delta * delta * n_a * n_b / safe_n, 0.0)
        self.nnz = self.nnz + other.nnz
        self.count += other.count
        return self

    @property
    def mean(self) -> np.ndarray:
        """Mean of every feature including implicit zeros."""
        if self.count == 0:
            return np.zeros(self.num_features)
        return self.mean_nz * self.nnz / self.count

    @property
    def variance(self) -> np.ndarray:
        """Unbiased sample variance of every feature; zeros when count < 2."""
        if self.count < 2:
            return np.zeros(self.num_features)
        nnz = self.nnz.astype(np.float64)
        n_zero = self.count - nnz
        # Combine non-zero group with the implicit zero group
        m2 = self.m2_nz + self.mean_nz * self.mean_nz * nnz * n_zero / self.count
        return np.maximum(m2 / (self.count - 1), 0.0)

    @property
    def std(self) -> np.ndarray:
        return np.sqrt(self.variance)


def merge_summaries(a: FeatureSummary, b: FeatureSummary) -> FeatureSummary:
    """Tree combiner: merge into ``a``."""
    return a.merge(b)


def summarize_partitions(partitions, num_features: int) -> FeatureSummary:
    """Summarize each partition separately, then merge pairwise."""
    summaries = [FeatureSummary(num_features).add_partition(p) for p in partitions]
    merged = tree_combine(summaries, merge_summaries)
    return merged if merged is not None else FeatureSummary(num_features)


def compute_feature_std(cache, num_features: int, comm, logger) -> np.ndarray:
    """
    Compute the read-only feature-scale vector over the whole dataset.

    Parameters
    ----------
    cache : PartitionCache
        Partitions owned by this rank.
    num_features : int
        Feature dimension.
    comm : MPI.Comm
        Communicator spanning every rank holding data.
    logger : logging.Logger
        Logger instance.

    Returns
    -------
    np.ndarray
        Standard deviation per feature (``writeable=False``), identical on
        every rank.

    Raises
    ------
    DatasetError
        If the dataset holds no example.
    """
    rank = comm.Get_rank()
    t_start = time.time()

    local = summarize_partitions(cache, num_features)
    logger.debug(f"Rank {rank}: summarized {local.count} examples from {len(cache)} partitions")

    total = tree_reduce(comm, local, merge_summaries, root=0)

    if rank == 0:
        count = total.count
        feature_std = total.std if count > 0 else None
    else:
        count, feature_std = None, None

    count = comm.bcast(count, root=0)
    if count == 0:
        raise DatasetError("Cannot standardize an empty dataset")

    feature_std = chunked_bcast(comm, feature_std, root=0)
    feature_std.flags.writeable = False

    if rank == 0:
        n_zero = int(np.sum(feature_std == 0.0))
        logger.info(f"Feature statistics over {count:,} examples in {time.time() - t_start:.1f}s")
        logger.info(f"  Zero-variance features: {n_zero:,}/{num_features:,}")

    return feature_std
