"""
Run the Hybrid SVM Pipeline.

Loads a LIBSVM dataset into partitions spread over MPI ranks, tunes the
learning rate per partition, builds a model-averaging warm start and
refines it under a fixed evaluation budget.

Usage:
    mpirun -np 8 hybridsvm-train --config configs/url_combined.yaml

    # Override scalar parameters from the command line
    mpirun -np 8 python -m hybridsvm.run_pipeline --config cfg.yaml \
        --reg-param 0.1 --num-workers 8 --partitions-per-core 2
"""

import argparse
import sys
import time
import numpy as np
import yaml

from .data import build_partition_cache
from .mpi_utils import get_world_comm
from .pipeline import run_hybrid_training
from .training import evaluate_model
from .utils import (
    ConfigError,
    load_config,
    validate_config,
    save_config,
    get_run_directory,
    get_output_paths,
    setup_logging,
    save_step_status,
    load_step_status,
    check_step_completed,
    print_header,
    print_config_summary,
)


# CLI flag -> (config attribute, type)
OVERRIDES = {
    "input_path": ("input_path", str),
    "num_iterations": ("num_iterations", int),
    "budget": ("budget", int),
    "step_size": ("step_size", float),
    "num_workers": ("num_workers", int),
    "cores_per_executor": ("cores_per_executor", int),
    "partitions_per_core": ("partitions_per_core", int),
    "reg_param": ("reg_param", float),
    "num_features": ("num_features", int),
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Hybrid SVM training: per-partition learning-rate search + budgeted refinement"
    )
    parser.add_argument("--config", type=str, required=True, help="Path to configuration YAML file")
    parser.add_argument("--run-dir", type=str, default=None,
                        help="Existing run directory (creates new if not specified)")
    parser.add_argument("--force", action="store_true",
                        help="Re-run training even if the run directory already completed it")
    for name, (_, type_) in OVERRIDES.items():
        parser.add_argument(f"--{name.replace('_', '-')}", dest=name, type=type_, default=None,
                            help=f"Override {name} from the config file")
    return parser


def apply_overrides(cfg, args):
    """Copy every CLI override that was given onto the config."""
    for name, (attr, _) in OVERRIDES.items():
        value = getattr(args, name, None)
        if value is not None:
            setattr(cfg, attr, value)
    return cfg


def save_run_artifacts(result, metrics: dict, paths: dict, cfg, logger):
    """Write run outputs (rank 0 only)."""
    np.save(paths["feature_std"], result.feature_std)
    np.save(paths["warm_start"], result.warm_start)

    tuning = result.tuning_results
    np.savez(
        paths["tuning_results"],
        partition_index=np.array([r.partition_index for r in tuning], dtype=np.int64),
        learning_rate=np.array([r.learning_rate for r in tuning]),
        loss=np.array([r.loss for r in tuning]),
        running_loss=np.array([r.running_loss for r in tuning]),
        n_examples=np.array([r.n_examples for r in tuning], dtype=np.int64),
        selected_index=result.selected.partition_index,
    )

    model = result.model
    np.savez(
        paths["final_model"],
        coefficients=model.coefficients,
        intercept=model.intercept,
        objective_history=np.array(model.objective_history),
    )

    with open(paths["metrics"], 'w') as f:
        yaml.dump(metrics, f, default_flow_style=False, sort_keys=False)

    logger.info(f"Saved artifacts to {cfg.run_dir}")


def main(argv=None):
    """Main entry point for the hybrid SVM pipeline."""
    args = build_parser().parse_args(argv)

    comm = get_world_comm()
    rank = comm.Get_rank()
    size = comm.Get_size()

    # Validate everything before touching the data
    try:
        cfg = validate_config(apply_overrides(load_config(args.config), args))
    except (ConfigError, OSError) as e:
        if rank == 0:
            print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(2)

    if rank == 0:
        run_dir = get_run_directory(cfg, args.run_dir)
        done = check_step_completed(run_dir, "train") and not args.force
        if not done:
            save_config(cfg, run_dir)
    else:
        run_dir, done = None, None
    run_dir, done = comm.bcast((run_dir, done), root=0)
    cfg.run_dir = run_dir

    if done:
        if rank == 0:
            print(f"Training already completed in {run_dir} (use --force to re-run)")
        return

    logger = setup_logging("pipeline", run_dir, cfg.log_level, rank)
    paths = get_output_paths(run_dir)

    if rank == 0:
        print_header("HYBRID SVM PIPELINE")
        print(f"  Configuration: {args.config}")
        print(f"  Run directory: {run_dir}")
        print(f"  MPI processes: {size}")
        print_config_summary(cfg)
        save_step_status(run_dir, "train", "running")

    start_time = time.time()
    cache = None

    try:
        cache = build_partition_cache(cfg, comm, logger)
        result = run_hybrid_training(cfg, cache, comm, logger)
        metrics = evaluate_model(result.model, cache, comm, cfg.reg_param)

        if rank == 0:
            metrics.update({
                "selected_learning_rate": float(result.selected.learning_rate),
                "selected_partition": int(result.selected.partition_index),
                "selected_loss": float(result.selected.loss),
                "refinement_evaluations": int(result.model.n_evaluations),
                "refinement_iterations": int(result.model.n_iterations),
                "timings": {k: float(v) for k, v in result.timings.items()},
            })
            save_run_artifacts(result, metrics, paths, cfg, logger)

            if cfg.generate_plots:
                from .plotting import plot_learning_rate_sweep
                plot_learning_rate_sweep(result.tuning_results, result.selected,
                                         paths["figures_dir"], logger)

            logger.info(f"Training accuracy: {metrics['accuracy']:.4f}, "
                        f"objective: {metrics['objective']:.6e}")
            save_step_status(run_dir, "train", "completed", {
                "selected_learning_rate": float(result.selected.learning_rate),
                "accuracy": float(metrics["accuracy"]),
                "total_seconds": time.time() - start_time,
            })

    except Exception as e:
        logger.error(f"Pipeline failed: {e}", exc_info=True)
        if rank == 0:
            save_step_status(run_dir, "train", "failed", {"error": str(e)})
        if size > 1:
            comm.Abort(1)
        raise

    finally:
        if cache is not None:
            cache.close()

    elapsed = time.time() - start_time

    if rank == 0:
        print_header("PIPELINE COMPLETE")
        print(f"  Total time: {elapsed:.1f}s ({elapsed/60:.1f} min)")
        print(f"  Run directory: {run_dir}")
        status = load_step_status(run_dir)
        print("\n  Step Status:")
        for step_name, step_info in status.items():
            print(f"    {step_name}: {step_info.get('status', 'unknown')}")


if __name__ == "__main__":
    main()
