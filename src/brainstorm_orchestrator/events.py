"""
Event stream for workflow observers.

The orchestrator emits a WorkflowEvent after each state change it has
committed. Subscribers (terminal display, history store, tests) are
notified in subscription order; a failing subscriber is logged and
skipped.
"""

import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
	PHASE_TRANSITION = "phase_transition"
	COST = "cost"
	MEMBER_FAILED = "member_failed"
	PHASE_RETRY = "phase_retry"
	SIGNAL_APPLIED = "signal_applied"
	CHECKPOINT_SAVED = "checkpoint_saved"
	SESSION_ABORTED = "session_aborted"


@dataclass
class WorkflowEvent:
	"""Something that happened to a session."""
	kind: EventKind
	session_id: str
	phase: str
	status: str
	iteration: int
	payload: dict[str, Any] = field(default_factory=dict)
	timestamp: str = field(default_factory=lambda: datetime.now().isoformat())


Subscriber = Callable[[WorkflowEvent], Union[None, Awaitable[None]]]


class EventBus:
	"""Fan-out of workflow events to sync or async subscribers."""

	def __init__(self):
		self._subscribers: list[Subscriber] = []

	def subscribe(self, subscriber: Subscriber) -> None:
		self._subscribers.append(subscriber)

	def unsubscribe(self, subscriber: Subscriber) -> None:
		if subscriber in self._subscribers:
			self._subscribers.remove(subscriber)

	async def emit(self, event: WorkflowEvent) -> None:
		for subscriber in list(self._subscribers):
			try:
				result = subscriber(event)
				if inspect.isawaitable(result):
					await result
			except Exception as e:
				logger.error(f"Event subscriber failed on {event.kind.value}: {e}")


class EventRecorder:
	"""Subscriber that keeps every event in memory."""

	def __init__(self, kinds: Optional[set[EventKind]] = None):
		self.kinds = kinds
		self.events: list[WorkflowEvent] = []

	def __call__(self, event: WorkflowEvent) -> None:
		if self.kinds is None or event.kind in self.kinds:
			self.events.append(event)

	def of_kind(self, kind: EventKind) -> list[WorkflowEvent]:
		return [e for e in self.events if e.kind == kind]
