"""Tests for the configuration system."""

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from brainstorm_orchestrator.config import Config, _apply_env_overrides, _apply_toml, load_config
from brainstorm_orchestrator.session.models import ExecutionMode, ExecutionPolicy


def test_config_defaults():
	"""Config should have sensible defaults."""
	config = Config()
	assert config.config_dir.is_absolute()
	assert config.data_dir.is_absolute()
	assert config.checkpoint_dir == config.data_dir / "checkpoints"
	assert config.history_db_path == config.data_dir / "history.db"
	assert config.log_dir == config.data_dir / "logs"
	assert config.mode == ExecutionMode.INTERACTIVE
	assert config.execution_policy == ExecutionPolicy.WAIT_ALL
	assert "default" in config.prices


def test_config_env_overrides():
	"""Environment variables should override defaults."""
	config = Config()
	with patch.dict(os.environ, {
		"BRAINSTORM_ORCHESTRATOR_DATA_DIR": "/tmp/test-data",
		"BRAINSTORM_ORCHESTRATOR_MAX_ITERATIONS": "7",
		"BRAINSTORM_ORCHESTRATOR_MODE": "autonomous",
		"BRAINSTORM_ORCHESTRATOR_DYNAMIC_TEAM": "yes",
	}):
		config = _apply_env_overrides(config)
		assert config.data_dir == Path("/tmp/test-data")
		assert config.max_iterations == 7
		assert config.mode == ExecutionMode.AUTONOMOUS
		assert config.dynamic_team is True
		# Derived paths should be recomputed
		assert config.checkpoint_dir == Path("/tmp/test-data/checkpoints")


def test_config_ensure_dirs(tmp_path: Path):
	"""ensure_dirs should create all required directories."""
	config = Config(
		config_dir=tmp_path / "config",
		data_dir=tmp_path / "data",
	)
	assert not config.data_dir.exists()

	config.ensure_dirs()

	assert config.config_dir.exists()
	assert config.checkpoint_dir.exists()
	assert config.log_dir.exists()


def test_toml_then_env_precedence(tmp_path: Path):
	"""config.toml overrides defaults; env vars override config.toml."""
	config_dir = tmp_path / "config"
	config_dir.mkdir()
	(config_dir / "config.toml").write_text(
		'quality_threshold = 9.5\n'
		'brainstormer_count = 5\n'
		'[prices.opus]\n'
		'input = 1.0\n'
		'output = 2.0\n'
	)
	config = Config(config_dir=config_dir, data_dir=tmp_path / "data")
	with patch.dict(os.environ, {"BRAINSTORM_ORCHESTRATOR_BRAINSTORMER_COUNT": "4"}):
		config = _apply_env_overrides(_apply_toml(config))

	assert config.quality_threshold == 9.5
	assert config.brainstormer_count == 4
	assert config.prices["opus"] == {"input": 1.0, "output": 2.0}
	assert "sonnet" in config.prices


def test_load_config_creates_dirs(tmp_path: Path):
	"""load_config should create directories."""
	with patch.dict(os.environ, {
		"BRAINSTORM_ORCHESTRATOR_DATA_DIR": str(tmp_path / "data"),
		"BRAINSTORM_ORCHESTRATOR_CONFIG_DIR": str(tmp_path / "config"),
	}):
		config = load_config()
		assert config.data_dir.exists()
		assert config.checkpoint_dir.exists()


def test_load_config_rejects_invalid_values(tmp_path: Path):
	with patch.dict(os.environ, {
		"BRAINSTORM_ORCHESTRATOR_DATA_DIR": str(tmp_path / "data"),
		"BRAINSTORM_ORCHESTRATOR_CONFIG_DIR": str(tmp_path / "config"),
		"BRAINSTORM_ORCHESTRATOR_QUALITY_THRESHOLD": "12",
	}):
		with pytest.raises(ValueError):
			load_config()


@pytest.mark.parametrize("field,value", [
	("max_iterations", 0),
	("researcher_count", 0),
	("first_n", 0),
	("max_team_size", 0),
	("agent_timeout", 0),
	("phase_retries", -1),
])
def test_validate(field, value):
	config = Config()
	setattr(config, field, value)
	with pytest.raises(ValueError):
		config.validate()
