"""
Core numerical kernels for hybrid SVM training.

This module contains the per-example operations shared by the tuner and
the model-averaging trainer:
- Candidate learning rate derivation
- Lazily-decayed weight vector (L2 shrinkage without touching every entry)
- One standardized SGD epoch over a sparse partition
- Hinge loss evaluation

These functions are pure NumPy/SciPy and never communicate.
"""

import numpy as np
from scipy import sparse
from typing import Optional, Tuple


# Below this the pending decay factor is folded into the vector.
MIN_DECAY_FACTOR = 1e-5

# rate * reg_param above this is considered numerically unstable.
MAX_RATE_REG_PRODUCT = 0.1


def candidate_learning_rate(partition_index: int) -> float:
    """Learning rate tried by a partition: ``10^(-2 - partition_index)``."""
    if partition_index < 0:
        raise ValueError(f"Invalid partition index: {partition_index}")
    return 10.0 ** (-2 - partition_index)


def is_unstable_rate(rate: float, reg_param: float) -> bool:
    """True if the candidate rate is too large for this regularization."""
    return rate * reg_param > MAX_RATE_REG_PRODUCT


def signed_labels(labels: np.ndarray) -> np.ndarray:
    """Map {0, 1} labels to {-1, +1}."""
    return 2.0 * np.asarray(labels, dtype=np.float64) - 1.0


# =============================================================================
# LAZY-DECAY WEIGHT VECTOR
# =============================================================================

class ScaledWeights:
    """
    Dense weight vector stored as ``scale * values``.

    Multiplying every weight by a shrinkage factor is O(1): only ``scale``
    changes. Sparse updates are written into ``values`` divided by the
    pending scale so that the true weights receive exactly the requested
    increment. When ``scale`` drops below ``MIN_DECAY_FACTOR`` it is folded
    into ``values`` to avoid underflow.

    Parameters
    ----------
    num_features : int
        Dimension of the weight vector.
    initial : np.ndarray, optional
        Starting weights (copied). Zeros if omitted.
    """

    def __init__(self, num_features: int, initial: Optional[np.ndarray] = None):
        if initial is None:
            self.values = np.zeros(num_features, dtype=np.float64)
        else:
            if initial.shape != (num_features,):
                raise ValueError(
                    f"Initial weights have shape {initial.shape}, expected ({num_features},)"
                )
            self.values = np.array(initial, dtype=np.float64)
        self.scale = 1.0
        self.n_rescales = 0

    @property
    def num_features(self) -> int:
        return self.values.shape[0]

    def dot(self, indices: np.ndarray, data: np.ndarray) -> float:
        """Dot product of the true weights with a sparse vector."""
        return float(np.dot(self.values[indices], data)) * self.scale

    def add_sparse(self, indices: np.ndarray, data: np.ndarray):
        """Add ``data`` to the true weights at ``indices``."""
        self.values[indices] += data / self.scale

    def decay(self, factor: float):
        """Multiply the true weights by ``factor``."""
        self.scale *= factor
        if self.scale < MIN_DECAY_FACTOR:
            self.materialize()
            self.n_rescales += 1

    def materialize(self) -> np.ndarray:
        """Fold the pending scale into the vector and return it."""
        if self.scale != 1.0:
            self.values *= self.scale
            self.scale = 1.0
        return self.values

    def to_dense(self) -> np.ndarray:
        """Copy of the true weights, without changing internal state."""
        return self.values * self.scale


# =============================================================================
# SGD EPOCH
# =============================================================================

def sgd_epoch(
    features: sparse.csr_matrix,
    labels: np.ndarray,
    weights: ScaledWeights,
    rate: float,
    reg_param: float,
    feature_std: Optional[np.ndarray] = None,
    mask: Optional[np.ndarray] = None,
) -> float:
    """
    Run one pass of hinge-loss SGD with L2 shrinkage over a partition.

    For every example with margin ``y * <w, x>`` below 1 the weights move by
    ``y * rate / (1 - rate*reg) * x_j / std_j**2`` on each non-zero feature
    ``j`` whose scale is non-zero; all weights then shrink by
    ``1 - rate*reg``. Without ``feature_std`` the step is unscaled.

    Parameters
    ----------
    features : scipy.sparse.csr_matrix
        Partition examples, one row each.
    labels : np.ndarray
        Labels in {0, 1}.
    weights : ScaledWeights
        Updated in place. Left with a pending scale; call ``materialize``.
    rate : float
        Learning rate.
    reg_param : float
        L2 regularization coefficient.
    feature_std : np.ndarray, optional
        Per-feature standard deviations.
    mask : np.ndarray of bool, optional
        Examples to visit. All examples if omitted.

    Returns
    -------
    float
        Running hinge loss accumulated against the moving model.
    """
    shrink = 1.0 - rate * reg_param
    step = rate / shrink
    y = signed_labels(labels)
    indptr, indices, data = features.indptr, features.indices, features.data
    inv_var = None
    if feature_std is not None:
        with np.errstate(divide='ignore', over='ignore'):
            inv_var = np.where(feature_std != 0.0, 1.0 / np.square(feature_std), 0.0)

    running_loss = 0.0
    for i in range(features.shape[0]):
        if mask is not None and not mask[i]:
            continue
        lo, hi = indptr[i], indptr[i + 1]
        idx, vals = indices[lo:hi], data[lo:hi]
        margin = y[i] * weights.dot(idx, vals)
        if margin < 1.0:
            if inv_var is None:
                weights.add_sparse(idx, (y[i] * step) * vals)
            else:
                ivar = inv_var[idx]
                touched = ivar != 0.0
                weights.add_sparse(idx[touched], (y[i] * step) * vals[touched] * ivar[touched])
            running_loss += 1.0 - margin
        weights.decay(shrink)
    return running_loss


# =============================================================================
# HINGE LOSS
# =============================================================================

def hinge_margins(features: sparse.csr_matrix, labels: np.ndarray, w: np.ndarray) -> np.ndarray:
    """Margins ``y * <w, x>`` for every example."""
    return signed_labels(labels) * (features @ w)


def hinge_loss_sum(features: sparse.csr_matrix, labels: np.ndarray, w: np.ndarray) -> float:
    """Sum of ``1 - margin`` over examples whose margin is below 1."""
    if features.shape[0] == 0:
        return 0.0
    margins = hinge_margins(features, labels, w)
    active = margins < 1.0
    return float(np.sum(1.0 - margins[active]))


def hinge_loss_and_gradient(
    features: sparse.csr_matrix, labels: np.ndarray, w: np.ndarray,
) -> Tuple[float, np.ndarray]:
    """
    Summed hinge loss and its subgradient over one partition.

    The subgradient of ``max(0, 1 - y<w,x>)`` is ``-y x`` where the margin
    is below 1 and zero elsewhere.
    """
    grad = np.zeros(features.shape[1], dtype=np.float64)
    if features.shape[0] == 0:
        return 0.0, grad
    y = signed_labels(labels)
    margins = y * (features @ w)
    active = margins < 1.0
    loss = float(np.sum(1.0 - margins[active]))
    coef = np.where(active, -y, 0.0)
    grad += features.T @ coef
    return loss, grad
