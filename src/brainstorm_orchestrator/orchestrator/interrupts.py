"""
Interrupt Channel - supervisor control signals for a running session.

Producers (the terminal, tests, another task) only enqueue signals. The
orchestrator drains and applies them at safe points. The one side effect a
producer has is tripping the cancellation token of the round in flight,
which in-flight agents observe cooperatively.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Optional

from ..errors import InvocationCancelled
from ..session.models import ExecutionMode

logger = logging.getLogger(__name__)


class SignalKind(str, Enum):
	"""Control signals a supervisor can issue."""
	SKIP = "skip"
	PAUSE = "pause"
	RESUME = "resume"
	STOP_WITH_FEEDBACK = "stop_with_feedback"
	CHANGE_MODE = "change_mode"
	ADJUST_MAX_ITERATIONS = "adjust_max_iterations"
	QUIT = "quit"


# Signals that also cancel the round in flight
CANCELLING_SIGNALS = frozenset({SignalKind.STOP_WITH_FEEDBACK, SignalKind.QUIT})


@dataclass(frozen=True)
class Signal:
	"""One control signal."""
	kind: SignalKind
	value: Any = None
	issued_at: str = field(default_factory=lambda: datetime.now().isoformat())


class CancellationToken:
	"""
	Cooperative cancellation flag.

	Child tokens are cancelled with their parent, never the reverse.
	"""

	def __init__(self, parent: Optional["CancellationToken"] = None):
		self._event = asyncio.Event()
		self._children: list[CancellationToken] = []
		self.reason: Optional[str] = None
		if parent is not None:
			parent._children.append(self)
			if parent.cancelled:
				self.cancel(parent.reason)

	@property
	def cancelled(self) -> bool:
		return self._event.is_set()

	def cancel(self, reason: Optional[str] = None) -> None:
		if self._event.is_set():
			return
		self.reason = reason
		self._event.set()
		for child in self._children:
			child.cancel(reason)

	def child(self) -> "CancellationToken":
		return CancellationToken(parent=self)

	async def wait(self) -> None:
		await self._event.wait()

	def raise_if_cancelled(self) -> None:
		if self._event.is_set():
			raise InvocationCancelled(self.reason)


class InterruptChannel:
	"""
	Queued control signals plus the token of the active round.

	Usage:
		channel = InterruptChannel()
		channel.stop_with_feedback("focus on sustainable materials")

		# orchestrator side
		token = channel.open_round()
		...
		channel.close_round(token)
		for signal in channel.drain():
			...
	"""

	def __init__(self):
		self._queue: deque[Signal] = deque()
		self._arrived = asyncio.Event()
		self._round: Optional[CancellationToken] = None

	# -- Producer API --------------------------------------------------

	def send(self, signal: Signal) -> None:
		"""Enqueue a signal; cancelling signals also trip the active round."""
		self._queue.append(signal)
		self._arrived.set()
		logger.info(f"Signal received: {signal.kind.value}")
		if signal.kind in CANCELLING_SIGNALS and self._round is not None:
			self._round.cancel(signal.kind.value)

	def skip(self) -> None:
		self.send(Signal(SignalKind.SKIP))

	def pause(self) -> None:
		self.send(Signal(SignalKind.PAUSE))

	def resume(self) -> None:
		self.send(Signal(SignalKind.RESUME))

	def stop_with_feedback(self, text: str) -> None:
		self.send(Signal(SignalKind.STOP_WITH_FEEDBACK, text))

	def change_mode(self, mode: ExecutionMode) -> None:
		self.send(Signal(SignalKind.CHANGE_MODE, ExecutionMode(mode)))

	def adjust_max_iterations(self, n: int) -> None:
		if int(n) < 1:
			raise ValueError(f"max_iterations must be >= 1, got {n}")
		self.send(Signal(SignalKind.ADJUST_MAX_ITERATIONS, int(n)))

	def quit(self) -> None:
		self.send(Signal(SignalKind.QUIT))

	# -- Consumer API (orchestrator only) ------------------------------

	def open_round(self) -> CancellationToken:
		"""Create the token for the next group of in-flight work."""
		token = CancellationToken()
		self._round = token
		# A stop or quit issued just before the round started still applies to it
		pending = next((s for s in self._queue if s.kind in CANCELLING_SIGNALS), None)
		if pending is not None:
			token.cancel(pending.kind.value)
		return token

	def close_round(self, token: CancellationToken) -> None:
		if self._round is token:
			self._round = None

	@property
	def pending(self) -> int:
		return len(self._queue)

	def drain(self) -> list[Signal]:
		"""Remove and return all queued signals in arrival order."""
		signals = list(self._queue)
		self._queue.clear()
		self._arrived.clear()
		return signals

	def take(self, kinds: Iterable[SignalKind]) -> Optional[Signal]:
		"""Remove and return the first queued signal of the given kinds, if any."""
		kinds = set(kinds)
		for signal in self._queue:
			if signal.kind in kinds:
				self._queue.remove(signal)
				if not self._queue:
					self._arrived.clear()
				return signal
		return None

	async def next_signal(self, kinds: Iterable[SignalKind]) -> Signal:
		"""Wait for a signal of the given kinds; other signals stay queued."""
		kinds = set(kinds)
		while True:
			signal = self.take(kinds)
			if signal is not None:
				return signal
			self._arrived.clear()
			await self._arrived.wait()

	async def wait_for_resume(self) -> Signal:
		"""
		Block while paused.

		Returns the RESUME or QUIT signal that ended the pause; anything else
		received meanwhile stays queued for the next boundary.
		"""
		return await self.next_signal({SignalKind.RESUME, SignalKind.QUIT})
