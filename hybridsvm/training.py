"""
Warm-start training and budgeted refinement.

Two collaborators consume the tuned learning rate:

    ModelAveragingTrainer
        Every partition runs an SGD epoch from the current global model;
        the partition models are averaged across ranks. Produces the
        warm-start weight vector.
    BudgetedLinearSVC
        Minimizes the L2-regularized mean hinge loss with L-BFGS-B, starting
        from the warm-start vector and stopping after a fixed number of
        distributed loss/gradient evaluations.

The pipeline only relies on their call signatures, so either can be
replaced by any object with the same methods.
"""

import time
import numpy as np
from dataclasses import dataclass, field
from typing import List, Optional
from scipy.optimize import minimize

from .core import ScaledWeights, hinge_loss_and_gradient, hinge_margins, sgd_epoch
from .data import DatasetError
from .mpi_utils import allreduce_sum, reduce_sum


# =============================================================================
# MODEL
# =============================================================================

@dataclass
class LinearSVMModel:
    """Binary linear SVM: predicts 1 when ``<w, x> + b > 0``."""
    coefficients: np.ndarray
    intercept: float = 0.0
    n_iterations: int = 0
    n_evaluations: int = 0
    objective_history: List[float] = field(default_factory=list)

    def decision_function(self, features) -> np.ndarray:
        return features @ self.coefficients + self.intercept

    def predict(self, features) -> np.ndarray:
        return (self.decision_function(features) > 0.0).astype(np.float64)


# =============================================================================
# MODEL AVERAGING
# =============================================================================

class ModelAveragingTrainer:
    """
    Parallel SGD with model averaging.

    Parameters
    ----------
    num_features : int
        Feature dimension.
    feature_std : np.ndarray, optional
        Feature-scale vector; steps are standardized when given.
    seed : int
        Seed for example sampling when ``mini_batch_fraction < 1``.
    logger : logging.Logger, optional
        Logger instance.
    """

    def __init__(self, num_features: int, feature_std: Optional[np.ndarray] = None,
                 seed: int = 42, logger=None):
        self.num_features = num_features
        self.feature_std = feature_std
        self.seed = seed
        self.logger = logger

    def train(self, cache, comm, num_iterations: int, step_size: float, reg_param: float,
              mini_batch_fraction: float = 1.0, initial_weights: Optional[np.ndarray] = None) -> np.ndarray:
        """
        Train and return the averaged weight vector (identical on every rank).

        Raises
        ------
        ValueError
            If ``step_size * reg_param >= 1`` (shrinkage would flip sign) or
            ``mini_batch_fraction`` is outside (0, 1].
        DatasetError
            If no partition holds data.
        """
        if step_size <= 0.0 or step_size * reg_param >= 1.0:
            raise ValueError(f"Invalid step size {step_size} for reg_param {reg_param}")
        if not (0.0 < mini_batch_fraction <= 1.0):
            raise ValueError(f"mini_batch_fraction must be in (0, 1], got {mini_batch_fraction}")

        w = (np.zeros(self.num_features) if initial_weights is None
             else np.array(initial_weights, dtype=np.float64))

        for iteration in range(num_iterations):
            t_start = time.time()
            local_sum = np.zeros(self.num_features)
            local_count = 0

            for partition in cache:
                if partition.n_examples == 0:
                    continue
                mask = None
                if mini_batch_fraction < 1.0:
                    rng = np.random.default_rng([self.seed, iteration, partition.index])
                    mask = rng.random(partition.n_examples) < mini_batch_fraction
                weights = ScaledWeights(self.num_features, initial=w)
                sgd_epoch(partition.features, partition.labels, weights,
                          step_size, reg_param, self.feature_std, mask=mask)
                local_sum += weights.materialize()
                local_count += 1

            total = allreduce_sum(comm, local_sum)
            count = comm.allreduce(local_count)
            if count == 0:
                raise DatasetError("Model averaging found no data")
            w = total / count

            if self.logger is not None and comm.Get_rank() == 0:
                self.logger.info(f"  Averaging iteration {iteration + 1}/{num_iterations}: "
                                 f"{count} partition models, {time.time() - t_start:.1f}s")

        return w


# =============================================================================
# BUDGETED REFINEMENT
# =============================================================================

class _BudgetExhausted(Exception):
    pass


class BudgetedLinearSVC:
    """
    Linear SVM refined with distributed L-BFGS-B under an evaluation budget.

    Objective: ``(1/n) * sum_i max(0, 1 - y_i <w, x_i>) + reg_param/2 * ||w||^2``.
    Rank 0 drives the optimizer; for every trial point it broadcasts the
    weights, every rank computes its partial loss and subgradient, and the
    sums are reduced back to rank 0.

    Parameters
    ----------
    max_iter : int
        Maximum optimizer iterations.
    reg_param : float
        L2 regularization coefficient.
    budget : int, optional
        Maximum number of distributed loss/gradient evaluations (each is a
        full pass over the data). Unlimited if None.
    tol : float
        Convergence tolerance; 0 runs until ``max_iter`` or the budget.
    fit_intercept, standardization : bool
        Only False is supported.
    """

    def __init__(self, max_iter: int = 100, reg_param: float = 0.0, budget: Optional[int] = None,
                 tol: float = 0.0, fit_intercept: bool = False, standardization: bool = False):
        if fit_intercept:
            raise ValueError("fit_intercept=True is not supported")
        if standardization:
            raise ValueError("standardization=True is not supported")
        if budget is not None and budget < 1:
            raise ValueError(f"budget must be >= 1, got {budget}")
        self.max_iter = max_iter
        self.reg_param = reg_param
        self.budget = budget
        self.tol = tol
        self.initial_weights = None

    def set_initial_model(self, weights: np.ndarray) -> "BudgetedLinearSVC":
        self.initial_weights = np.array(weights, dtype=np.float64)
        return self

    def _local_loss_and_gradient(self, cache, w):
        loss = 0.0
        grad = np.zeros_like(w)
        for partition in cache:
            part_loss, part_grad = hinge_loss_and_gradient(partition.features, partition.labels, w)
            loss += part_loss
            grad += part_grad
        return loss, grad

    def fit(self, cache, comm, num_features: int, logger=None) -> LinearSVMModel:
        """
        Fit on every rank's partitions; the model is returned on every rank.

        If rank 0 fails while evaluating, it completes the pending
        reductions and broadcasts an abort, so worker ranks raise instead
        of waiting. A failure inside a collective itself leaves the ranks
        out of step; only ``comm.Abort`` (as the CLI does) ends the job then.

        Raises
        ------
        DatasetError
            If the dataset is empty.
        RuntimeError
            On worker ranks, if rank 0 failed during optimization.
        """
        rank = comm.Get_rank()
        n_total = comm.allreduce(cache.n_examples())
        if n_total == 0:
            raise DatasetError("Cannot fit on an empty dataset")

        x0 = self.initial_weights if self.initial_weights is not None else np.zeros(num_features)
        if x0.shape != (num_features,):
            raise ValueError(f"Initial model has shape {x0.shape}, expected ({num_features},)")

        if rank != 0:
            return self._serve_evaluations(cache, comm)

        state = {"n_evals": 0, "history": [], "best_f": np.inf, "best_w": x0.copy()}

        def objective(w):
            if self.budget is not None and state["n_evals"] >= self.budget:
                raise _BudgetExhausted()
            comm.bcast(("eval", w), root=0)
            try:
                loss, grad = self._local_loss_and_gradient(cache, w)
            except Exception:
                # Workers are already in the reductions; finish them so the
                # abort broadcast below is matched
                comm.reduce(0.0, root=0)
                reduce_sum(comm, np.zeros_like(w), root=0)
                raise
            loss = comm.reduce(loss, root=0)
            grad = reduce_sum(comm, grad, root=0)
            f = loss / n_total + 0.5 * self.reg_param * float(np.dot(w, w))
            g = grad / n_total + self.reg_param * w
            state["n_evals"] += 1
            state["history"].append(f)
            if f < state["best_f"]:
                state["best_f"], state["best_w"] = f, w.copy()
            return f, g

        n_iterations = 0
        t_start = time.time()
        try:
            result = minimize(
                objective, x0, jac=True, method="L-BFGS-B",
                options={"maxiter": self.max_iter, "maxfun": self.budget or 15000,
                         "ftol": self.tol, "gtol": self.tol},
            )
            n_iterations = int(result.nit)
            if logger is not None:
                logger.info(f"  L-BFGS-B stopped: {result.message}")
        except _BudgetExhausted:
            if logger is not None:
                logger.info(f"  Evaluation budget of {self.budget} exhausted")
        except Exception:
            comm.bcast(("abort", None), root=0)
            raise

        w_final = state["best_w"]
        comm.bcast(("stop", w_final), root=0)

        if logger is not None:
            logger.info(f"  Refinement: {state['n_evals']} evaluations in {time.time() - t_start:.1f}s, "
                        f"objective {state['best_f']:.6e}")

        return LinearSVMModel(
            coefficients=w_final,
            n_iterations=n_iterations,
            n_evaluations=state["n_evals"],
            objective_history=state["history"],
        )

    def _serve_evaluations(self, cache, comm) -> LinearSVMModel:
        n_evals = 0
        while True:
            command, w = comm.bcast(None, root=0)
            if command == "stop":
                return LinearSVMModel(coefficients=w, n_evaluations=n_evals)
            if command == "abort":
                raise RuntimeError("Refinement aborted on rank 0")
            loss, grad = self._local_loss_and_gradient(cache, w)
            comm.reduce(loss, root=0)
            reduce_sum(comm, grad, root=0)
            n_evals += 1


# =============================================================================
# EVALUATION
# =============================================================================

def evaluate_model(model: LinearSVMModel, cache, comm, reg_param: float) -> dict:
    """
    Training-set accuracy and objective of a model, identical on every rank.
    """
    n_correct, loss, n = 0, 0.0, 0
    for partition in cache:
        if partition.n_examples == 0:
            continue
        predictions = model.predict(partition.features)
        n_correct += int(np.sum(predictions == partition.labels))
        margins = hinge_margins(partition.features, partition.labels, model.coefficients)
        loss += float(np.sum(np.maximum(0.0, 1.0 - margins)))
        n += partition.n_examples

    n_correct = comm.allreduce(n_correct)
    loss = comm.allreduce(loss)
    n = comm.allreduce(n)
    if n == 0:
        raise DatasetError("Cannot evaluate on an empty dataset")

    w = model.coefficients
    return {
        "n_examples": int(n),
        "accuracy": n_correct / n,
        "mean_hinge_loss": loss / n,
        "objective": loss / n + 0.5 * reg_param * float(np.dot(w, w)),
    }
