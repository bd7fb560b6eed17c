"""Exception taxonomy for the brainstorming workflow engine."""

from typing import Optional


class OrchestratorError(Exception):
	"""Base exception for orchestration errors."""
	pass


class ProviderError(OrchestratorError):
	"""
	Raised when a text-generation call fails.

	Transient errors (rate limits, timeouts, overload) are retried by the
	invoker with backoff; permanent errors surface as a failed member.
	"""

	def __init__(self, message: str, transient: bool = True, role_instance: Optional[str] = None):
		super().__init__(message)
		self.transient = transient
		self.role_instance = role_instance

	@property
	def kind(self) -> str:
		return "transient" if self.transient else "permanent"


class InvocationCancelled(OrchestratorError):
	"""Raised inside an agent invocation once its cancellation token trips."""

	def __init__(self, reason: Optional[str] = None):
		super().__init__(reason or "cancelled")
		self.reason = reason


class PartialPhaseFailure(OrchestratorError):
	"""All members of a required role failed; the phase will be retried."""

	def __init__(self, phase: str, failed_roles: list[str], attempt: int = 1):
		super().__init__(
			f"Phase {phase} attempt {attempt}: all members failed for {', '.join(failed_roles)}"
		)
		self.phase = phase
		self.failed_roles = failed_roles
		self.attempt = attempt


class PhaseFailure(OrchestratorError):
	"""A phase could not complete even after retrying; the session aborts."""

	def __init__(self, phase: str, failed_roles: list[str], reason: str = ""):
		message = f"Phase {phase} failed"
		if failed_roles:
			message += f" for {', '.join(failed_roles)}"
		if reason:
			message += f": {reason}"
		super().__init__(message)
		self.phase = phase
		self.failed_roles = failed_roles
		self.reason = reason


class CheckpointError(OrchestratorError):
	"""Base exception for checkpoint persistence errors."""
	pass


class CorruptCheckpoint(CheckpointError):
	"""Raised when a checkpoint cannot be decoded or fails consistency checks."""
	pass


class CheckpointNotFound(CheckpointError):
	"""Raised when a checkpoint identifier does not exist."""
	pass


class InvariantViolation(OrchestratorError):
	"""A consistency check failed. Always fatal."""
	pass


class StaleStateError(OrchestratorError):
	"""Raised when a compare-and-set update sees unexpected current values."""
	pass
