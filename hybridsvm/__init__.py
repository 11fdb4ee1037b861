"""
Hybrid Data-Parallel Linear SVM Training.

This package trains a binary linear SVM on a sparse LIBSVM dataset spread
over MPI ranks, in four stages:

    Stage 1: Feature standardization (per-feature std, tree reduction)
    Stage 2: Learning-rate search (partition p tries 10^(-2-p), min-loss wins)
    Stage 3: Warm start (model-averaging SGD at the selected rate)
    Stage 4: Refinement (L-BFGS-B under a fixed evaluation budget)

Each partition runs one SGD epoch with L2 shrinkage applied lazily through a
scale factor, so the cost per example is proportional to its non-zeros.

Modules:
    core          - SGD epoch, lazily-decayed weights, hinge loss
    mpi_utils     - Index distribution, tree reductions, broadcasts
    data          - LIBSVM parsing, partitioning, HDF5-spilling cache
    standardize   - Mergeable feature statistics
    tuning        - Partition-local tuning and min-loss selection
    training      - Model averaging and budgeted refinement
    pipeline      - Stage sequencing
    utils         - Configuration, logging, run directories
    plotting      - Diagnostic figures
    run_pipeline  - Command-line entry point

References:
    - Shalev-Shwartz et al. (2011). Pegasos: primal estimated sub-gradient
      solver for SVM.
    - Zinkevich et al. (2010). Parallelized stochastic gradient descent.
"""

from .core import (
    candidate_learning_rate,
    is_unstable_rate,
    ScaledWeights,
    sgd_epoch,
    hinge_loss_sum,
)

from .data import (
    DatasetError,
    Partition,
    PartitionCache,
    parse_libsvm_line,
    iter_libsvm_records,
    read_libsvm_partitions,
    build_partition_cache,
)

from .standardize import FeatureSummary, compute_feature_std

from .tuning import (
    SENTINEL_LOSS,
    TuningResult,
    tune_partition,
    select_best,
    parallel_learning_rate_search,
)

from .training import (
    LinearSVMModel,
    ModelAveragingTrainer,
    BudgetedLinearSVC,
    evaluate_model,
)

from .pipeline import HybridTrainingResult, run_hybrid_training

from .utils import (
    ConfigError,
    HybridSVMConfig,
    load_config,
    validate_config,
    save_config,
    get_run_directory,
    get_output_paths,
    setup_logging,
)

__version__ = "1.0.0"
