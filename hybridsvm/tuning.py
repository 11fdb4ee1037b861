"""
Learning-rate search over data partitions.

This module handles:
- Partition-local tuning (one SGD epoch at a partition-specific rate)
- Unbiased loss re-evaluation against the final local model
- Cluster-wide selection of the minimum-loss candidate

Every partition tries ``10^(-2 - partition_index)``, so a single pass over
the data explores as many orders of magnitude as there are partitions.
"""

import math
import sys
import time
import numpy as np
from typing import List, NamedTuple, Optional

from .core import (
    ScaledWeights,
    candidate_learning_rate,
    hinge_loss_sum,
    is_unstable_rate,
    sgd_epoch,
)
from .mpi_utils import gather_to_root, tree_allreduce, tree_combine


# Loss reported for candidates that were not (or could not be) evaluated.
SENTINEL_LOSS = sys.float_info.max


class TuningResult(NamedTuple):
    """Outcome of tuning one partition."""
    loss: float
    learning_rate: float
    partition_index: int
    n_examples: int = 0
    running_loss: float = float("nan")

    @property
    def is_sentinel(self) -> bool:
        return self.loss == SENTINEL_LOSS


# =============================================================================
# PARTITION-LOCAL TUNING
# =============================================================================

def tune_partition(partition, num_features: int, reg_param: float,
                   feature_std: np.ndarray, logger=None) -> TuningResult:
    """
    Evaluate the partition's candidate learning rate.

    Runs one standardized SGD epoch from zero weights, then measures the
    hinge loss of the final model on the same examples. The running loss
    of the epoch is kept for diagnostics only; it is computed against a
    moving model and is biased.

    Parameters
    ----------
    partition : Partition
        Examples of this task, visited in order.
    num_features : int
        Feature dimension.
    reg_param : float
        L2 regularization coefficient.
    feature_std : np.ndarray
        Read-only feature-scale vector.
    logger : logging.Logger, optional
        Receives a debug line per partition.

    Returns
    -------
    TuningResult
        ``SENTINEL_LOSS`` if the rate is unstable for ``reg_param`` or the
        partition is empty.
    """
    rate = candidate_learning_rate(partition.index)

    if is_unstable_rate(rate, reg_param):
        if logger is not None:
            logger.debug(f"Partition {partition.index}: rate {rate:.1e} unstable for reg {reg_param}")
        return TuningResult(SENTINEL_LOSS, rate, partition.index, partition.n_examples)

    if partition.n_examples == 0:
        if logger is not None:
            logger.debug(f"Partition {partition.index}: empty, rate {rate:.1e} not evaluated")
        return TuningResult(SENTINEL_LOSS, rate, partition.index, 0)

    weights = ScaledWeights(num_features)
    running_loss = sgd_epoch(
        partition.features, partition.labels, weights, rate, reg_param, feature_std,
    )
    local_model = weights.materialize()

    real_loss = hinge_loss_sum(partition.features, partition.labels, local_model)

    if logger is not None:
        logger.debug(
            f"Partition {partition.index}: rate={rate:.1e} loss={running_loss:.6e} "
            f"real_loss={real_loss:.6e} rescales={weights.n_rescales}"
        )

    return TuningResult(real_loss, rate, partition.index, partition.n_examples, running_loss)


# =============================================================================
# SELECTION
# =============================================================================

def _selection_key(result: TuningResult) -> tuple:
    # NaN ranks after every number, equal losses fall back to partition order
    return (math.isnan(result.loss), result.loss if not math.isnan(result.loss) else 0.0,
            result.partition_index)


def select_best(a: TuningResult, b: TuningResult) -> TuningResult:
    """
    Return the better of two tuning results.

    Strictly lower loss wins. On equal loss the lower partition index wins,
    which makes the comparison a total order: any reduction tree picks the
    same result.
    """
    return a if _selection_key(a) <= _selection_key(b) else b


def reduce_tuning_results(local_results: List[TuningResult], comm) -> Optional[TuningResult]:
    """Minimum over every rank's results, available on all ranks."""
    local_best = tree_combine(local_results, select_best)
    return tree_allreduce(comm, local_best, select_best)


def parallel_learning_rate_search(cache, num_features: int, reg_param: float,
                                  feature_std: np.ndarray, comm, logger) -> tuple:
    """
    Tune every partition owned by this rank and select the global best.

    Parameters
    ----------
    cache : PartitionCache
        Partitions owned by this rank.
    num_features : int
        Feature dimension.
    reg_param : float
        L2 regularization coefficient.
    feature_std : np.ndarray
        Read-only feature-scale vector.
    comm : MPI.Comm
        Communicator.
    logger : logging.Logger
        Logger instance.

    Returns
    -------
    tuple
        ``(best, all_results)``: the selected ``TuningResult`` on every rank,
        and every partition's result sorted by partition index on rank 0
        (None elsewhere).
    """
    rank = comm.Get_rank()
    t_start = time.time()

    local_results = [
        tune_partition(partition, num_features, reg_param, feature_std, logger)
        for partition in cache
    ]
    logger.debug(f"Rank {rank}: tuned {len(local_results)} partitions in {time.time() - t_start:.1f}s")

    best = reduce_tuning_results(local_results, comm)
    all_results = gather_to_root(comm, local_results, root=0)

    if rank == 0:
        all_results.sort(key=lambda r: r.partition_index)
        for r in all_results:
            logger.info(f"  Partition {r.partition_index:4d}: rate={r.learning_rate:.1e} loss={r.loss:.6e}")
        if best is None:
            raise ValueError("No partitions were tuned")
        if best.is_sentinel:
            logger.warning(
                f"Every candidate rate is unstable or unevaluated for reg_param={reg_param}; "
                f"falling back to partition {best.partition_index}"
            )
        logger.info(f"Selected learning rate {best.learning_rate:.1e} "
                    f"(partition {best.partition_index}, loss={best.loss:.6e})")
    elif best is None:
        raise ValueError("No partitions were tuned")

    return best, all_results
