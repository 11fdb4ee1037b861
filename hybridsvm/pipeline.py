"""
Hybrid SVM training driver.

Sequences the stages of a run; owns no numerics:

    1. Feature standardization (tree reduction, broadcast read-only)
    2. Learning-rate search (one candidate per partition, min-loss reduction)
    3. Warm start (model averaging at the selected rate, one iteration)
    4. Refinement (budgeted linear SVM initialized from the warm start)

Failures from any stage propagate unchanged.
"""

import time
import numpy as np
from dataclasses import dataclass, field
from typing import List, Optional

from .standardize import compute_feature_std
from .tuning import TuningResult, parallel_learning_rate_search
from .training import BudgetedLinearSVC, LinearSVMModel, ModelAveragingTrainer


@dataclass
class HybridTrainingResult:
    """Everything a run produces. ``tuning_results`` is only set on rank 0."""
    feature_std: np.ndarray
    selected: TuningResult
    warm_start: np.ndarray
    model: LinearSVMModel
    tuning_results: Optional[List[TuningResult]] = None
    timings: dict = field(default_factory=dict)


def run_hybrid_training(cfg, cache, comm, logger, trainer=None, refiner=None) -> HybridTrainingResult:
    """
    Run standardize -> tune -> warm start -> refine.

    Parameters
    ----------
    cfg : HybridSVMConfig
        Validated configuration.
    cache : PartitionCache
        Partitions owned by this rank; read by every stage, never modified.
    comm : MPI.Comm
        Communicator.
    logger : logging.Logger
        Logger instance.
    trainer : object, optional
        Provides ``train(cache, comm, num_iterations, step_size, reg_param,
        mini_batch_fraction)`` returning a dense weight vector. Defaults to
        ``ModelAveragingTrainer`` with standardized steps.
    refiner : object, optional
        Provides ``set_initial_model(weights)`` and ``fit(cache, comm,
        num_features, logger)`` returning a ``LinearSVMModel``. Defaults to
        ``BudgetedLinearSVC``.

    Returns
    -------
    HybridTrainingResult
    """
    rank = comm.Get_rank()
    timings = {}

    if cfg.step_size is not None and rank == 0:
        logger.warning(
            f"step_size={cfg.step_size} is not used: each partition derives its own candidate rate"
        )

    # Stage 1
    if rank == 0:
        logger.info("=" * 60)
        logger.info("STAGE 1: Feature standardization")
        logger.info("=" * 60)
    t0 = time.time()
    feature_std = compute_feature_std(cache, cfg.num_features, comm, logger)
    timings["standardize_seconds"] = time.time() - t0

    # Stage 2
    if rank == 0:
        logger.info("=" * 60)
        logger.info("STAGE 2: Learning-rate search")
        logger.info("=" * 60)
    t0 = time.time()
    selected, tuning_results = parallel_learning_rate_search(
        cache, cfg.num_features, cfg.reg_param, feature_std, comm, logger,
    )
    timings["tuning_seconds"] = time.time() - t0

    # Stage 3
    if rank == 0:
        logger.info("=" * 60)
        logger.info(f"STAGE 3: Model averaging at rate {selected.learning_rate:.1e}")
        logger.info("=" * 60)
    if trainer is None:
        trainer = ModelAveragingTrainer(cfg.num_features, feature_std, seed=cfg.seed, logger=logger)
    t0 = time.time()
    warm_start = trainer.train(
        cache, comm,
        num_iterations=1,
        step_size=selected.learning_rate,
        reg_param=cfg.reg_param,
        mini_batch_fraction=1.0,
    )
    timings["warm_start_seconds"] = time.time() - t0

    # Stage 4
    if rank == 0:
        logger.info("=" * 60)
        logger.info(f"STAGE 4: Refinement (max_iter={cfg.num_iterations}, budget={cfg.budget})")
        logger.info("=" * 60)
    if refiner is None:
        refiner = BudgetedLinearSVC(
            max_iter=cfg.num_iterations,
            reg_param=cfg.reg_param,
            budget=cfg.budget,
            tol=0.0,
            fit_intercept=False,
            standardization=False,
        )
    refiner.set_initial_model(warm_start)
    t0 = time.time()
    model = refiner.fit(cache, comm, cfg.num_features, logger)
    timings["refinement_seconds"] = time.time() - t0

    return HybridTrainingResult(
        feature_std=feature_std,
        selected=selected,
        warm_start=warm_start,
        model=model,
        tuning_results=tuning_results,
        timings=timings,
    )
