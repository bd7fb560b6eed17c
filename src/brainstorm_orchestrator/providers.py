"""
Text generation providers.

The orchestrator treats model invocation as an opaque capability behind
the TextGenerator protocol. ClaudeCLIGenerator runs the Claude Code CLI in
print mode, the same way plans are generated elsewhere in this package.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from .errors import ProviderError
from .session.models import Role

logger = logging.getLogger(__name__)

CHARS_PER_UNIT = 4  # Rough estimate when the backend reports no usage

# stderr fragments that indicate a retryable failure
TRANSIENT_MARKERS = (
	"rate limit",
	"rate_limit",
	"overloaded",
	"timeout",
	"timed out",
	"429",
	"500",
	"502",
	"503",
	"529",
	"connection",
	"temporarily",
)


@dataclass
class GenerationConfig:
	"""Per-call settings passed through to the backend."""
	model: str
	timeout: float
	system_prompt: Optional[str] = None


@dataclass
class Generation:
	"""Backend response with usage."""
	content: str
	input_units: int
	output_units: int
	model: str


class TextGenerator(Protocol):
	"""Anything that turns a role prompt into text."""

	async def generate(self, role: Role, prompt: str, config: GenerationConfig) -> Generation:
		"""
		Generate a response.

		Raises:
			ProviderError: transient or permanent backend failure
		"""
		...


def estimate_units(text: str) -> int:
	return max(1, len(text) // CHARS_PER_UNIT)


def is_transient_message(message: str) -> bool:
	lowered = message.lower()
	return any(marker in lowered for marker in TRANSIENT_MARKERS)


class ClaudeCLIGenerator:
	"""Runs `claude --print --output-format json` per call."""

	def __init__(self, executable: str = "claude", extra_args: Optional[list[str]] = None):
		self.executable = executable
		self.extra_args = extra_args or []

	def _build_args(self, config: GenerationConfig) -> list[str]:
		args = [
			self.executable,
			"--print",
			"--output-format", "json",
			"--model", config.model,
		]
		if config.system_prompt:
			args.extend(["--append-system-prompt", config.system_prompt])
		return args + self.extra_args

	async def generate(self, role: Role, prompt: str, config: GenerationConfig) -> Generation:
		try:
			process = await asyncio.create_subprocess_exec(
				*self._build_args(config),
				stdin=asyncio.subprocess.PIPE,
				stdout=asyncio.subprocess.PIPE,
				stderr=asyncio.subprocess.PIPE,
			)
		except FileNotFoundError as e:
			raise ProviderError(f"Claude CLI not found: {self.executable}", transient=False) from e

		try:
			stdout, stderr = await process.communicate(input=prompt.encode())
		except asyncio.CancelledError:
			# Timeouts and interrupts cancel us; don't leave the CLI running
			if process.returncode is None:
				process.kill()
				await process.wait()
			raise

		if process.returncode != 0:
			message = stderr.decode(errors="replace").strip() or f"exit code {process.returncode}"
			logger.warning(f"Claude CLI failed for {role.value}: {message[:200]}")
			raise ProviderError(message, transient=is_transient_message(message))

		return self._parse_output(stdout.decode(errors="replace"), prompt, config.model)

	def _parse_output(self, raw: str, prompt: str, model: str) -> Generation:
		"""Extract content and usage from CLI JSON output, falling back to raw text."""
		try:
			data = json.loads(raw)
		except json.JSONDecodeError:
			data = None
		if not isinstance(data, dict):
			return Generation(
				content=raw.strip(),
				input_units=estimate_units(prompt),
				output_units=estimate_units(raw),
				model=model,
			)

		if data.get("is_error"):
			message = str(data.get("result") or "unknown error")
			raise ProviderError(message, transient=is_transient_message(message))

		content = str(data.get("result", ""))
		usage = data.get("usage") or {}
		input_units = int(usage.get("input_tokens") or 0) + int(usage.get("cache_read_input_tokens") or 0)
		output_units = int(usage.get("output_tokens") or 0)
		return Generation(
			content=content,
			input_units=input_units or estimate_units(prompt),
			output_units=output_units or estimate_units(content),
			model=model,
		)
