"""Centralized logging configuration for brainstorm-orchestrator."""

import os
import sys
import logging
from pathlib import Path
from logging.handlers import RotatingFileHandler
from typing import Optional, Union

ROOT_LOGGER = "brainstorm_orchestrator"


def setup_logging(
	level: Optional[str] = None,
	log_dir: Optional[Union[str, Path]] = None,
	console: bool = True,
) -> logging.Logger:
	"""
	Set up logging with console and file handlers on the package logger.

	Args:
		level: Log level (DEBUG, INFO, WARNING, ERROR). Defaults to env var or WARNING.
		log_dir: Directory for the rotating log file. No file handler if omitted.
		console: Whether to log to stderr (the terminal display owns stdout)

	Returns:
		Configured logger
	"""
	level = level or os.getenv("LOG_LEVEL", "WARNING")
	log_level = getattr(logging, level.upper(), logging.WARNING)

	logger = logging.getLogger(ROOT_LOGGER)
	logger.setLevel(logging.DEBUG)

	# Avoid duplicate handlers
	if logger.handlers:
		return logger

	detailed_formatter = logging.Formatter(
		"%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s",
		datefmt="%Y-%m-%d %H:%M:%S",
	)
	simple_formatter = logging.Formatter(
		"%(asctime)s [%(levelname)s] %(message)s",
		datefmt="%H:%M:%S",
	)

	if console:
		console_handler = logging.StreamHandler(sys.stderr)
		console_handler.setLevel(log_level)
		console_handler.setFormatter(simple_formatter)
		logger.addHandler(console_handler)

	if log_dir:
		log_path = Path(log_dir)
		log_path.mkdir(parents=True, exist_ok=True)

		file_handler = RotatingFileHandler(
			log_path / f"{ROOT_LOGGER}.log",
			maxBytes=10 * 1024 * 1024,  # 10 MB
			backupCount=5,
		)
		file_handler.setLevel(logging.DEBUG)  # File gets all logs
		file_handler.setFormatter(detailed_formatter)
		logger.addHandler(file_handler)

	return logger
