"""
Tests for configuration, run directories, logging and step status.
"""

import logging
import os

import pytest
import yaml

from hybridsvm.utils import (
    ConfigError,
    HybridSVMConfig,
    check_step_completed,
    create_run_directory,
    get_output_paths,
    get_run_directory,
    load_config,
    load_step_status,
    save_config,
    save_step_status,
    setup_logging,
    validate_config,
)


def write_config(tmp_path, data):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.dump(data))
    return str(path)


BASE = {
    "run_name": "unit",
    "paths": {"input_path": "/data/train.libsvm", "output_base": "/tmp/runs"},
    "dataset": {"num_features": 100},
    "cluster": {"num_workers": 2, "cores_per_executor": 4, "partitions_per_core": 3},
    "training": {"num_iterations": 50, "budget": 20, "reg_param": "1e-4"},
}


# ============================================================================
# Loading and validation
# ============================================================================

class TestLoadConfig:

    def test_sections(self, tmp_path):
        cfg = load_config(write_config(tmp_path, BASE))
        assert cfg.run_name == "unit"
        assert cfg.input_path == "/data/train.libsvm"
        assert cfg.num_features == 100
        assert cfg.num_partitions == 24
        assert cfg.num_iterations == 50
        assert cfg.budget == 20
        assert cfg.step_size is None

    def test_numeric_strings_coerced(self, tmp_path):
        cfg = load_config(write_config(tmp_path, BASE))
        assert cfg.reg_param == pytest.approx(1e-4)
        assert isinstance(cfg.reg_param, float)

    def test_defaults(self, tmp_path):
        cfg = load_config(write_config(tmp_path, {"paths": {"input_path": "x"}}))
        assert cfg.num_workers == 1
        assert cfg.log_level == "INFO"
        assert cfg.generate_plots is True
        assert cfg.max_memory_mb == 4096.0

    @pytest.mark.parametrize("section,key,value", [
        ("training", "reg_param", "abc"),
        ("training", "budget", 2.5),
        ("cluster", "num_workers", True),
        ("dataset", "num_features", None),
    ])
    def test_non_numeric_rejected(self, tmp_path, section, key, value):
        data = {k: dict(v) if isinstance(v, dict) else v for k, v in BASE.items()}
        data[section][key] = value
        with pytest.raises(ConfigError):
            load_config(write_config(tmp_path, data))

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigError):
            load_config(str(path))

    def test_empty_section_uses_defaults(self, tmp_path):
        path = tmp_path / "empty_section.yaml"
        path.write_text("paths:\ndataset:\n  num_features: 3\ntraining:\n")
        cfg = load_config(str(path))
        assert cfg.input_path == ""
        assert cfg.num_features == 3
        assert cfg.budget == 100
        with pytest.raises(ConfigError):
            validate_config(cfg)

    def test_section_not_a_mapping(self, tmp_path):
        path = tmp_path / "list_section.yaml"
        path.write_text("paths:\n  - train.libsvm\n")
        with pytest.raises(ConfigError, match="paths"):
            load_config(str(path))

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("paths: [unclosed\n")
        with pytest.raises(ConfigError, match="not valid YAML"):
            load_config(str(path))

    @pytest.mark.parametrize("section,key,value", [
        ("paths", "input_path", 12),
        ("paths", "output_base", ["a", "b"]),
        ("cache", "spill_dir", 3),
        ("execution", "log_level", 10),
    ])
    def test_non_string_rejected(self, tmp_path, section, key, value):
        data = {k: dict(v) if isinstance(v, dict) else v for k, v in BASE.items()}
        data.setdefault(section, {})[key] = value
        with pytest.raises(ConfigError, match=key):
            load_config(write_config(tmp_path, data))


class TestValidateConfig:

    def _valid(self, **overrides):
        cfg = HybridSVMConfig(input_path="data.txt", num_features=10)
        for key, value in overrides.items():
            setattr(cfg, key, value)
        return cfg

    def test_valid(self):
        assert validate_config(self._valid()).num_partitions == 1

    @pytest.mark.parametrize("overrides", [
        {"input_path": ""},
        {"num_features": 0},
        {"num_workers": 0},
        {"cores_per_executor": -1},
        {"partitions_per_core": 0},
        {"num_iterations": 0},
        {"budget": 0},
        {"reg_param": -1.0},
        {"reg_param": float("nan")},
        {"reg_param": float("inf")},
        {"step_size": 0.0},
        {"max_memory_mb": -1.0},
        {"log_level": "LOUD"},
    ])
    def test_invalid(self, overrides):
        with pytest.raises(ConfigError):
            validate_config(self._valid(**overrides))

    def test_step_size_accepted(self):
        assert validate_config(self._valid(step_size=0.1)).step_size == 0.1


def test_save_and_reload(tmp_path):
    cfg = load_config(write_config(tmp_path, BASE))
    out = tmp_path / "out"
    out.mkdir()
    path = save_config(cfg, str(out))
    reloaded = load_config(path)
    assert reloaded.num_partitions == cfg.num_partitions
    assert reloaded.reg_param == cfg.reg_param
    assert reloaded.input_path == cfg.input_path
    assert os.path.basename(save_config(cfg, str(out), step_name="train")) == "config_train.yaml"


# ============================================================================
# Run directories and status
# ============================================================================

class TestRunDirectory:

    def test_create(self, tmp_path):
        cfg = HybridSVMConfig(run_name="abc", output_base=str(tmp_path))
        run_dir = create_run_directory(cfg)
        assert os.path.isdir(run_dir)
        assert run_dir.endswith("_abc")
        assert cfg.run_dir == run_dir

    def test_reuse_existing(self, tmp_path):
        cfg = HybridSVMConfig(output_base=str(tmp_path / "other"))
        assert get_run_directory(cfg, str(tmp_path)) == str(tmp_path)
        assert cfg.run_dir == str(tmp_path)

    def test_output_paths(self, tmp_path):
        paths = get_output_paths(str(tmp_path))
        assert set(paths) == {
            "feature_std", "tuning_results", "warm_start", "final_model", "metrics", "figures_dir",
        }
        assert all(p.startswith(str(tmp_path)) for p in paths.values())


def test_step_status(tmp_path):
    run_dir = str(tmp_path)
    assert load_step_status(run_dir) == {}
    assert not check_step_completed(run_dir, "train")

    save_step_status(run_dir, "train", "running")
    assert not check_step_completed(run_dir, "train")

    save_step_status(run_dir, "train", "completed", {"accuracy": 0.9})
    status = load_step_status(run_dir)
    assert status["train"]["status"] == "completed"
    assert status["train"]["accuracy"] == 0.9
    assert check_step_completed(run_dir, "train")


# ============================================================================
# Logging
# ============================================================================

class TestSetupLogging:

    def test_root_rank_writes_file(self, tmp_path):
        logger = setup_logging("unit", str(tmp_path), "DEBUG", rank=0)
        logger.info("hello")
        for handler in logger.handlers:
            handler.flush()
        with open(tmp_path / "unit.log") as f:
            assert "[Rank 0000] INFO: hello" in f.read()

    def test_other_ranks_console_only(self, tmp_path):
        logger = setup_logging("unit", str(tmp_path), "INFO", rank=3)
        assert not any(isinstance(h, logging.FileHandler) for h in logger.handlers)
        assert all(h.level == logging.WARNING for h in logger.handlers)
        assert not os.path.exists(tmp_path / "unit.log")

    def test_idempotent(self, tmp_path):
        setup_logging("again", str(tmp_path), "INFO", rank=0)
        logger = setup_logging("again", str(tmp_path), "INFO", rank=0)
        assert len(logger.handlers) == 2
