"""
Utility functions for the hybrid SVM pipeline.

This module provides shared utilities:
- Configuration loading and validation
- Run directory management
- Logging setup
- Step status tracking
- Console output helpers
"""

import os
import sys
import yaml
import logging
from datetime import datetime
from dataclasses import dataclass
from typing import Optional


class ConfigError(ValueError):
    """Raised when a configuration value is missing, non-numeric or out of range."""


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class HybridSVMConfig:
    """Configuration container for the hybrid SVM pipeline."""

    # Run identification
    run_name: str = ""
    run_dir: str = ""

    # Paths
    input_path: str = ""
    output_base: str = ""

    # Dataset
    num_features: int = 0
    zero_based: bool = False

    # Cluster layout (logical partitions)
    num_workers: int = 1
    cores_per_executor: int = 1
    partitions_per_core: int = 1

    # Training
    num_iterations: int = 10
    budget: int = 100
    step_size: Optional[float] = None
    reg_param: float = 0.0

    # Partition cache
    max_memory_mb: float = 4096.0
    spill_dir: str = ""

    # Execution
    log_level: str = "INFO"
    generate_plots: bool = True
    seed: int = 42

    @property
    def num_partitions(self) -> int:
        return self.num_workers * self.cores_per_executor * self.partitions_per_core


def _as_int(value, name: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{name} must be an integer, got {value!r}")
    try:
        as_float = float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be an integer, got {value!r}") from None
    if not as_float.is_integer():
        raise ConfigError(f"{name} must be an integer, got {value!r}")
    return int(as_float)


def _as_float(value, name: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"{name} must be a number, got {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be a number, got {value!r}") from None


def _as_str(value, name: str) -> str:
    if not isinstance(value, str):
        raise ConfigError(f"{name} must be a string, got {value!r}")
    return value


def _section(raw: dict, name: str) -> dict:
    # An empty section (``paths:`` with nothing under it) loads as None
    section = raw.get(name)
    if section is None:
        return {}
    if not isinstance(section, dict):
        raise ConfigError(f"Config section '{name}' must be a mapping, got {section!r}")
    return section


def load_config(config_path: str) -> HybridSVMConfig:
    """
    Load configuration from YAML file.

    Numeric fields are coerced with ``int``/``float`` since YAML reads
    values such as ``1e-5`` as strings. Range checks are left to
    ``validate_config``.

    Parameters
    ----------
    config_path : str
        Path to YAML configuration file.

    Returns
    -------
    HybridSVMConfig
        Populated configuration object.

    Raises
    ------
    ConfigError
        If the file is not valid YAML, is not a mapping, or holds a value
        of the wrong type.
    """
    with open(config_path, 'r') as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Config file {config_path} is not valid YAML: {e}") from e

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping")

    cfg = HybridSVMConfig()
    cfg.run_name = str(raw.get("run_name", "") or "")

    # Paths
    paths = _section(raw, "paths")
    cfg.input_path = _as_str(paths.get("input_path") or "", "paths.input_path")
    cfg.output_base = _as_str(paths.get("output_base") or "", "paths.output_base")

    # Dataset
    dataset = _section(raw, "dataset")
    cfg.num_features = _as_int(dataset.get("num_features", 0), "dataset.num_features")
    cfg.zero_based = bool(dataset.get("zero_based", False))

    # Cluster
    cluster = _section(raw, "cluster")
    cfg.num_workers = _as_int(cluster.get("num_workers", 1), "cluster.num_workers")
    cfg.cores_per_executor = _as_int(cluster.get("cores_per_executor", 1), "cluster.cores_per_executor")
    cfg.partitions_per_core = _as_int(cluster.get("partitions_per_core", 1), "cluster.partitions_per_core")

    # Training
    training = _section(raw, "training")
    cfg.num_iterations = _as_int(training.get("num_iterations", 10), "training.num_iterations")
    cfg.budget = _as_int(training.get("budget", 100), "training.budget")
    step_size = training.get("step_size")
    cfg.step_size = None if step_size is None else _as_float(step_size, "training.step_size")
    cfg.reg_param = _as_float(training.get("reg_param", 0.0), "training.reg_param")

    # Cache
    cache = _section(raw, "cache")
    cfg.max_memory_mb = _as_float(cache.get("max_memory_mb", 4096.0), "cache.max_memory_mb")
    cfg.spill_dir = _as_str(cache.get("spill_dir") or "", "cache.spill_dir")

    # Execution
    execution = _section(raw, "execution")
    cfg.log_level = _as_str(execution.get("log_level", "INFO"), "execution.log_level")
    cfg.generate_plots = bool(execution.get("generate_plots", True))
    cfg.seed = _as_int(execution.get("seed", 42), "execution.seed")

    return cfg


def validate_config(cfg: HybridSVMConfig) -> HybridSVMConfig:
    """
    Check every scalar parameter before any cluster work starts.

    Raises
    ------
    ConfigError
        On the first invalid value.
    """
    if not cfg.input_path or not isinstance(cfg.input_path, str):
        raise ConfigError(f"paths.input_path must be a non-empty path, got {cfg.input_path!r}")
    if not isinstance(cfg.output_base, str):
        raise ConfigError(f"paths.output_base must be a string, got {cfg.output_base!r}")
    if cfg.num_features < 1:
        raise ConfigError(f"num_features must be >= 1, got {cfg.num_features}")
    for name in ("num_workers", "cores_per_executor", "partitions_per_core"):
        if getattr(cfg, name) < 1:
            raise ConfigError(f"{name} must be >= 1, got {getattr(cfg, name)}")
    if cfg.num_iterations < 1:
        raise ConfigError(f"num_iterations must be >= 1, got {cfg.num_iterations}")
    if cfg.budget < 1:
        raise ConfigError(f"budget must be >= 1, got {cfg.budget}")
    if not (cfg.reg_param >= 0.0) or cfg.reg_param == float("inf"):
        raise ConfigError(f"reg_param must be finite and >= 0, got {cfg.reg_param}")
    if cfg.step_size is not None and not (cfg.step_size > 0.0):
        raise ConfigError(f"step_size must be > 0, got {cfg.step_size}")
    if not (cfg.max_memory_mb >= 0.0):
        raise ConfigError(f"max_memory_mb must be >= 0, got {cfg.max_memory_mb}")
    levels = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
    if not isinstance(cfg.log_level, str) or cfg.log_level.upper() not in levels:
        raise ConfigError(f"Unknown log_level: {cfg.log_level}")
    return cfg


def save_config(cfg: HybridSVMConfig, output_path: str, step_name: str = None) -> str:
    """Save configuration to YAML file."""
    config_dict = {
        "run_name": cfg.run_name,
        "run_dir": cfg.run_dir,
        "paths": {"input_path": cfg.input_path, "output_base": cfg.output_base},
        "dataset": {"num_features": cfg.num_features, "zero_based": cfg.zero_based},
        "cluster": {
            "num_workers": cfg.num_workers,
            "cores_per_executor": cfg.cores_per_executor,
            "partitions_per_core": cfg.partitions_per_core,
        },
        "training": {
            "num_iterations": cfg.num_iterations,
            "budget": cfg.budget,
            "step_size": cfg.step_size,
            "reg_param": cfg.reg_param,
        },
        "cache": {"max_memory_mb": cfg.max_memory_mb, "spill_dir": cfg.spill_dir},
        "execution": {
            "log_level": cfg.log_level,
            "generate_plots": cfg.generate_plots,
            "seed": cfg.seed,
        },
    }

    filename = f"config_{step_name}.yaml" if step_name else "config.yaml"
    filepath = os.path.join(output_path, filename)

    with open(filepath, 'w') as f:
        yaml.dump(config_dict, f, default_flow_style=False, sort_keys=False)

    return filepath


# =============================================================================
# RUN DIRECTORY MANAGEMENT
# =============================================================================

def create_run_directory(cfg: HybridSVMConfig) -> str:
    """
    Make ``<output_base>/<YYYYmmdd_HHMMSS>[_<run_name>]`` and record it on
    the config.
    """
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    suffix = f"_{cfg.run_name}" if cfg.run_name else ""
    cfg.run_dir = os.path.join(cfg.output_base, stamp + suffix)
    os.makedirs(cfg.run_dir, exist_ok=True)
    return cfg.run_dir


def get_run_directory(cfg: HybridSVMConfig, run_dir: str = None) -> str:
    """Reuse ``run_dir`` when it already exists, otherwise start a new one."""
    if not run_dir or not os.path.isdir(run_dir):
        return create_run_directory(cfg)
    cfg.run_dir = run_dir
    return run_dir


def get_output_paths(run_dir: str) -> dict:
    """Artifact locations inside a run directory."""
    names = {
        "feature_std": "feature_std.npy",
        "tuning_results": "tuning_results.npz",
        "warm_start": "warm_start.npy",
        "final_model": "final_model.npz",
        "metrics": "metrics.yaml",
        "figures_dir": "figures",
    }
    return {key: os.path.join(run_dir, name) for key, name in names.items()}


# =============================================================================
# LOGGING
# =============================================================================

def setup_logging(name: str, run_dir: str, log_level: str = "INFO", rank: int = 0) -> logging.Logger:
    """
    Set up logging for MPI parallel execution.

    Every rank logs to stderr with its rank in the prefix, but ranks other
    than 0 only pass warnings and errors. Rank 0 also appends everything
    (DEBUG included) to ``<run_dir>/<name>.log``.
    """
    level = getattr(logging, log_level.upper())
    logger = logging.getLogger(f"{name}.rank{rank}")
    logger.setLevel(level)
    logger.handlers = []
    logger.propagate = False

    formatter = logging.Formatter(
        f'%(asctime)s [Rank {rank:04d}] %(levelname)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    # stderr so it lands in the scheduler's .err file
    console = logging.StreamHandler(sys.stderr)
    console.setLevel(level if rank == 0 else logging.WARNING)
    console.setFormatter(formatter)
    logger.addHandler(console)

    if rank == 0 and run_dir:
        file_handler = logging.FileHandler(os.path.join(run_dir, f"{name}.log"), mode='a')
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


# =============================================================================
# STEP STATUS TRACKING
# =============================================================================

STATUS_FILE = "pipeline_status.yaml"


def load_step_status(run_dir: str) -> dict:
    """Read ``pipeline_status.yaml``; empty if no step has run yet."""
    status_file = os.path.join(run_dir, STATUS_FILE)
    if not os.path.exists(status_file):
        return {}
    with open(status_file, 'r') as f:
        return yaml.safe_load(f) or {}


def save_step_status(run_dir: str, step: str, status: str, metadata: dict = None):
    """
    Record ``status`` (running / completed / failed) for ``step``.

    Entries for other steps are preserved. ``metadata`` is merged into the
    step's entry next to the timestamp.
    """
    status_data = load_step_status(run_dir)
    entry = {"status": status, "timestamp": datetime.now().isoformat()}
    entry.update(metadata or {})
    status_data[step] = entry

    with open(os.path.join(run_dir, STATUS_FILE), 'w') as f:
        yaml.dump(status_data, f, default_flow_style=False)


def check_step_completed(run_dir: str, step: str) -> bool:
    return load_step_status(run_dir).get(step, {}).get("status") == "completed"


# =============================================================================
# CONSOLE OUTPUT HELPERS
# =============================================================================

def print_header(title: str, width: int = 70):
    rule = "=" * width
    print(f"\n{rule}\n {title}\n{rule}")


def print_config_summary(cfg: HybridSVMConfig):
    """Print the run settings that shape the partitioning and training."""
    print_header("HYBRID SVM CONFIGURATION")
    print(f"  Run name: {cfg.run_name or '(auto)'}")
    print(f"  Input: {cfg.input_path}")
    print(f"  Features: {cfg.num_features:,}")
    print(f"  Partitions: {cfg.num_partitions} "
          f"({cfg.num_workers} x {cfg.cores_per_executor} x {cfg.partitions_per_core})")
    print(f"  L2 regularization: {cfg.reg_param}")
    print(f"  Refinement: max_iter={cfg.num_iterations}, budget={cfg.budget}")
    print(f"  Cache: {cfg.max_memory_mb:.0f} MB in memory per rank")
    print("=" * 70 + "\n")
