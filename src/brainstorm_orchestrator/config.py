"""Configuration system using platformdirs for cross-platform paths."""

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

import platformdirs

from .session.models import ExecutionMode, ExecutionPolicy

APP_NAME = "brainstorm-orchestrator"
ENV_PREFIX = "BRAINSTORM_ORCHESTRATOR_"

# USD per million input/output units
DEFAULT_PRICES: dict[str, dict[str, float]] = {
	"default": {"input": 3.0, "output": 15.0},
	"sonnet": {"input": 3.0, "output": 15.0},
	"opus": {"input": 15.0, "output": 75.0},
	"haiku": {"input": 0.8, "output": 4.0},
}


@dataclass
class Config:
	"""Central configuration with XDG/platform conventions."""

	config_dir: Path = field(default_factory=lambda: Path(platformdirs.user_config_dir(APP_NAME)))
	data_dir: Path = field(default_factory=lambda: Path(platformdirs.user_data_dir(APP_NAME)))

	# Derived paths
	checkpoint_dir: Path = field(init=False)
	history_db_path: Path = field(init=False)
	log_dir: Path = field(init=False)

	# Workflow
	quality_threshold: float = 8.0
	max_iterations: int = 3
	mode: ExecutionMode = ExecutionMode.INTERACTIVE
	researcher_count: int = 2
	brainstormer_count: int = 3
	execution_policy: ExecutionPolicy = ExecutionPolicy.WAIT_ALL
	first_n: int = 2
	top_k: int = 2
	clarify_word_threshold: int = 6
	# Adopt the team size the Planner proposes, capped at max_team_size per role
	dynamic_team: bool = False
	max_team_size: int = 8

	# Agent invocation
	model: str = "sonnet"
	agent_timeout: float = 120.0
	provider_max_retries: int = 3
	backoff_base: float = 1.0
	backoff_max: float = 30.0
	phase_retries: int = 1
	cancel_grace: float = 5.0
	prices: dict[str, dict[str, float]] = field(default_factory=lambda: dict(DEFAULT_PRICES))

	def __post_init__(self) -> None:
		self.checkpoint_dir = self.data_dir / "checkpoints"
		self.history_db_path = self.data_dir / "history.db"
		self.log_dir = self.data_dir / "logs"

	def ensure_dirs(self) -> None:
		"""Create all required directories."""
		self.config_dir.mkdir(parents=True, exist_ok=True)
		self.data_dir.mkdir(parents=True, exist_ok=True)
		self.checkpoint_dir.mkdir(parents=True, exist_ok=True)
		self.log_dir.mkdir(parents=True, exist_ok=True)

	def validate(self) -> None:
		"""Reject option values the workflow cannot run with."""
		if not 0 <= self.quality_threshold <= 10:
			raise ValueError(f"quality_threshold must be within [0, 10], got {self.quality_threshold}")
		if self.max_iterations < 1:
			raise ValueError(f"max_iterations must be >= 1, got {self.max_iterations}")
		if self.researcher_count < 1 or self.brainstormer_count < 1:
			raise ValueError("researcher_count and brainstormer_count must be >= 1")
		if self.first_n < 1 or self.top_k < 1:
			raise ValueError("first_n and top_k must be >= 1")
		if self.max_team_size < 1:
			raise ValueError(f"max_team_size must be >= 1, got {self.max_team_size}")
		if self.agent_timeout <= 0:
			raise ValueError(f"agent_timeout must be positive, got {self.agent_timeout}")
		if self.provider_max_retries < 0 or self.phase_retries < 0:
			raise ValueError("retry counts cannot be negative")


# Field name -> converter for values read from env vars or config.toml
_FIELD_TYPES = {
	"config_dir": lambda v: Path(os.path.expanduser(v)),
	"data_dir": lambda v: Path(os.path.expanduser(v)),
	"quality_threshold": float,
	"max_iterations": int,
	"mode": ExecutionMode,
	"researcher_count": int,
	"brainstormer_count": int,
	"execution_policy": ExecutionPolicy,
	"first_n": int,
	"top_k": int,
	"clarify_word_threshold": int,
	"dynamic_team": lambda v: str(v).strip().lower() in ("1", "true", "yes", "on"),
	"max_team_size": int,
	"model": str,
	"agent_timeout": float,
	"provider_max_retries": int,
	"backoff_base": float,
	"backoff_max": float,
	"phase_retries": int,
	"cancel_grace": float,
}


def _apply_env_overrides(config: Config) -> Config:
	"""Apply BRAINSTORM_ORCHESTRATOR_* environment variable overrides."""
	for attr, convert in _FIELD_TYPES.items():
		val = os.getenv(f"{ENV_PREFIX}{attr.upper()}")
		if val:
			setattr(config, attr, convert(val))
	# Recompute derived paths after overrides
	config.__post_init__()
	return config


def _apply_toml(config: Config) -> Config:
	"""Apply config.toml overrides if file exists."""
	toml_path = config.config_dir / "config.toml"
	if not toml_path.exists():
		return config

	with open(toml_path, "rb") as f:
		data = tomllib.load(f)

	for key, val in data.items():
		if key in _FIELD_TYPES:
			setattr(config, key, _FIELD_TYPES[key](val))
		elif key == "prices" and isinstance(val, dict):
			config.prices = {**config.prices, **val}

	# Recompute derived paths after toml overrides
	config.__post_init__()
	return config


def load_config() -> Config:
	"""Load config with precedence: env vars > config.toml > defaults."""
	config = Config()
	config = _apply_toml(config)
	config = _apply_env_overrides(config)
	config.validate()
	config.ensure_dirs()
	return config


# Singleton
_config: Config | None = None


def get_config() -> Config:
	"""Get or create the global config instance."""
	global _config
	if _config is None:
		_config = load_config()
	return _config
