"""
Session Models - Pydantic schemas for the brainstorming session aggregate.

Defines the session record, versioned plans, research findings,
candidates, evaluations and cost records, plus the snapshot that
bundles them for checkpointing.
"""

import math
import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ..errors import InvariantViolation


def _now() -> str:
	return datetime.now().isoformat()


def new_id(prefix: str) -> str:
	"""Generate a short prefixed identifier."""
	return f"{prefix}-{uuid.uuid4().hex[:12]}"


class Phase(str, Enum):
	"""Workflow state machine phases."""
	INIT = "init"
	PLANNING = "planning"
	CLARIFYING = "clarifying"
	WORKING = "working"
	EVALUATING = "evaluating"
	DECIDING = "deciding"
	REPORTING = "reporting"
	DONE = "done"


class ExecutionMode(str, Enum):
	"""Whether human gates are consulted."""
	INTERACTIVE = "interactive"
	AUTONOMOUS = "autonomous"


class SessionStatus(str, Enum):
	"""Lifecycle status of a session."""
	RUNNING = "running"
	PAUSED = "paused"
	AWAITING_INPUT = "awaiting_input"
	COMPLETED = "completed"
	ABORTED = "aborted"


class PlanStatus(str, Enum):
	"""Approval state of a plan version."""
	PROPOSED = "proposed"
	APPROVED = "approved"
	MODIFIED = "modified"
	REJECTED = "rejected"


class Role(str, Enum):
	"""Functional agent categories."""
	PLANNER = "planner"
	EXPERT = "expert"
	RESEARCHER = "researcher"
	BRAINSTORMER = "brainstormer"
	EVALUATOR = "evaluator"


class ExecutionPolicy(str, Enum):
	"""Completion policy for a parallel task group."""
	WAIT_ALL = "wait_all"
	FIRST_N = "first_n"


# Fixed integration order for parallel results
ROLE_ORDER = {role: i for i, role in enumerate(Role)}

PHASE_TRANSITIONS: dict[Phase, frozenset[Phase]] = {
	Phase.INIT: frozenset({Phase.PLANNING}),
	Phase.PLANNING: frozenset({Phase.CLARIFYING, Phase.WORKING}),
	Phase.CLARIFYING: frozenset({Phase.WORKING}),
	Phase.WORKING: frozenset({Phase.EVALUATING}),
	Phase.EVALUATING: frozenset({Phase.DECIDING}),
	Phase.DECIDING: frozenset({Phase.WORKING, Phase.REPORTING}),
	Phase.REPORTING: frozenset({Phase.DONE}),
	Phase.DONE: frozenset(),
}

STATUS_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
	SessionStatus.RUNNING: frozenset({
		SessionStatus.PAUSED,
		SessionStatus.AWAITING_INPUT,
		SessionStatus.COMPLETED,
		SessionStatus.ABORTED,
	}),
	SessionStatus.PAUSED: frozenset({SessionStatus.RUNNING, SessionStatus.ABORTED}),
	SessionStatus.AWAITING_INPUT: frozenset({
		SessionStatus.RUNNING,
		SessionStatus.PAUSED,
		SessionStatus.ABORTED,
	}),
	SessionStatus.COMPLETED: frozenset(),
	# An aborted session can be resumed from its last checkpoint
	SessionStatus.ABORTED: frozenset({SessionStatus.RUNNING}),
}

PLAN_TRANSITIONS: dict[PlanStatus, frozenset[PlanStatus]] = {
	PlanStatus.PROPOSED: frozenset({PlanStatus.APPROVED, PlanStatus.MODIFIED, PlanStatus.REJECTED}),
	PlanStatus.APPROVED: frozenset({PlanStatus.MODIFIED}),
	PlanStatus.MODIFIED: frozenset(),
	PlanStatus.REJECTED: frozenset(),
}


def role_instance_id(role: Role, index: int) -> str:
	"""Identifier for one member of a role, e.g. 'researcher-2'."""
	return f"{role.value}-{index}"


def parse_role_instance(role_instance: str) -> tuple[Role, int]:
	"""Split a role instance id back into (role, index)."""
	name, _, index = role_instance.rpartition("-")
	return Role(name), int(index)


class Session(BaseModel):
	"""Scalar state of one brainstorming session."""
	id: str = Field(default_factory=lambda: new_id("session"))
	request: str = Field(description="The original user request")
	created_at: str = Field(default_factory=_now)
	phase: Phase = Field(default=Phase.INIT)
	mode: ExecutionMode = Field(default=ExecutionMode.INTERACTIVE)
	iteration: int = Field(default=0, ge=0)
	max_iterations: int = Field(default=3, ge=1)
	quality_threshold: float = Field(default=8.0, ge=0, le=10)
	total_cost: float = Field(default=0.0, ge=0)
	status: SessionStatus = Field(default=SessionStatus.RUNNING)
	termination_reason: Optional[str] = Field(default=None)
	feedback: list[str] = Field(default_factory=list, description="User feedback, oldest first")
	clarified_requirements: list[str] = Field(default_factory=list)
	report: Optional[str] = Field(default=None)


class Plan(BaseModel):
	"""
	An ordered list of steps proposed by the Planner.

	Plans are versioned: a user modification produces a new version
	referencing its parent instead of editing the approved one.
	"""
	id: str = Field(default_factory=lambda: new_id("plan"))
	version: int = Field(default=1, ge=1)
	parent_version: Optional[int] = Field(default=None)
	steps: list[str] = Field(default_factory=list)
	status: PlanStatus = Field(default=PlanStatus.PROPOSED)
	created_at: str = Field(default_factory=_now)
	approved_at: Optional[str] = Field(default=None)
	notes: str = Field(default="")
	review_notes: str = Field(default="")


class Finding(BaseModel):
	"""A research result produced by one Researcher."""
	id: str = Field(default_factory=lambda: new_id("finding"))
	role_instance: str
	topic: str
	content: str
	summary: str = Field(default="")
	iteration: int = Field(default=1, ge=1)
	cost_record_ids: list[str] = Field(default_factory=list)


class Candidate(BaseModel):
	"""
	A generated solution artifact.

	`rationale` holds the generation reasoning; it never leaves the
	generation side of the workflow.
	"""
	id: str = Field(default_factory=lambda: new_id("candidate"))
	role_instance: str
	variant: str
	content: str
	rationale: str = Field(default="")
	parent_id: Optional[str] = Field(default=None)
	iteration: int = Field(default=1, ge=1)
	cost_record_ids: list[str] = Field(default_factory=list)


class Evaluation(BaseModel):
	"""Scores for one candidate in one iteration."""
	id: str = Field(default_factory=lambda: new_id("evaluation"))
	candidate_id: str
	iteration: int = Field(ge=1)
	role_instance: str = Field(default="")
	quality: float = Field(ge=0, le=10)
	clarity: float = Field(ge=0, le=10)
	specificity: float = Field(ge=0, le=10)
	overall: float = Field(ge=0, le=10)
	rationale: str = Field(default="")
	human_override: Optional[float] = Field(default=None, ge=0, le=10)

	@property
	def final_score(self) -> float:
		"""The human override when present, otherwise the computed overall score."""
		if self.human_override is not None:
			return self.human_override
		return self.overall


class CostRecord(BaseModel):
	"""One priced provider call. Never mutated."""
	model_config = ConfigDict(frozen=True)

	id: str = Field(default_factory=lambda: new_id("cost"))
	role_instance: str
	model: str
	input_units: int = Field(ge=0)
	output_units: int = Field(ge=0)
	cost: float = Field(ge=0)
	timestamp: str = Field(default_factory=_now)


class TransitionRecord(BaseModel):
	"""Audit entry for a phase or status change."""
	sequence: int = Field(ge=1)
	from_phase: Phase
	to_phase: Phase
	from_status: SessionStatus
	to_status: SessionStatus
	iteration: int = Field(ge=0)
	timestamp: str = Field(default_factory=_now)


class TeamDescriptor(BaseModel):
	"""Declarative team composition proposed during planning."""
	researchers: int = Field(default=2, ge=1)
	brainstormers: int = Field(default=3, ge=1)
	policy: ExecutionPolicy = Field(default=ExecutionPolicy.WAIT_ALL)
	first_n: Optional[int] = Field(default=None, ge=1)

	def count_for(self, role: Role) -> int:
		if role == Role.RESEARCHER:
			return self.researchers
		if role == Role.BRAINSTORMER:
			return self.brainstormers
		return 1


def rank_evaluations(candidates: list[Candidate], evaluations: list[Evaluation], iteration: int) -> list[Evaluation]:
	"""
	Evaluations of one iteration, best final score first.

	Ties keep candidate creation order.
	"""
	order = {c.id: i for i, c in enumerate(candidates)}
	scoped = [e for e in evaluations if e.iteration == iteration]
	return sorted(scoped, key=lambda e: (-e.final_score, order.get(e.candidate_id, len(order))))


class SessionSnapshot(BaseModel):
	"""The full session aggregate, as checkpointed."""
	session: Session
	plans: list[Plan] = Field(default_factory=list)
	findings: list[Finding] = Field(default_factory=list)
	candidates: list[Candidate] = Field(default_factory=list)
	evaluations: list[Evaluation] = Field(default_factory=list)
	cost_records: list[CostRecord] = Field(default_factory=list)
	transitions: list[TransitionRecord] = Field(default_factory=list)
	team: Optional[TeamDescriptor] = Field(default=None)

	def approved_plan(self) -> Optional[Plan]:
		"""Get the currently approved plan version, if any."""
		for plan in self.plans:
			if plan.status == PlanStatus.APPROVED:
				return plan
		return None

	def candidates_for_iteration(self, iteration: int) -> list[Candidate]:
		return [c for c in self.candidates if c.iteration == iteration]

	def evaluations_for_iteration(self, iteration: int) -> list[Evaluation]:
		return [e for e in self.evaluations if e.iteration == iteration]

	def check_invariants(self) -> None:
		"""
		Verify the aggregate is internally consistent.

		Raises:
			InvariantViolation: On the first failed check
		"""
		session = self.session
		if session.iteration > session.max_iterations:
			raise InvariantViolation(
				f"Iteration {session.iteration} exceeds max {session.max_iterations}"
			)

		approved = [p for p in self.plans if p.status == PlanStatus.APPROVED]
		if len(approved) > 1:
			raise InvariantViolation(f"{len(approved)} plans approved at once")

		candidate_ids = set()
		for candidate in self.candidates:
			if candidate.parent_id and candidate.parent_id not in candidate_ids:
				raise InvariantViolation(
					f"Candidate {candidate.id} references unknown parent {candidate.parent_id}"
				)
			candidate_ids.add(candidate.id)

		scored = set()
		for evaluation in self.evaluations:
			if evaluation.candidate_id not in candidate_ids:
				raise InvariantViolation(
					f"Evaluation {evaluation.id} references unknown candidate {evaluation.candidate_id}"
				)
			key = (evaluation.candidate_id, evaluation.iteration)
			if key in scored:
				raise InvariantViolation(
					f"Duplicate evaluation for candidate {evaluation.candidate_id} "
					f"in iteration {evaluation.iteration}"
				)
			scored.add(key)

		total = math.fsum(r.cost for r in self.cost_records)
		if not math.isclose(total, session.total_cost, rel_tol=1e-9, abs_tol=1e-9):
			raise InvariantViolation(
				f"Session cost {session.total_cost} != sum of cost records {total}"
			)

		last_iteration = 0
		previous: Optional[TransitionRecord] = None
		for i, transition in enumerate(self.transitions, start=1):
			if transition.sequence != i:
				raise InvariantViolation(f"Transition sequence gap at {i}")
			if previous and (
				previous.to_phase != transition.from_phase
				or previous.to_status != transition.from_status
			):
				raise InvariantViolation(f"Transition {i} does not continue from transition {i - 1}")
			previous = transition
			if (
				transition.from_phase != transition.to_phase
				and transition.to_phase not in PHASE_TRANSITIONS[transition.from_phase]
			):
				raise InvariantViolation(
					f"Illegal phase transition {transition.from_phase.value} -> {transition.to_phase.value}"
				)
			if (
				transition.from_status != transition.to_status
				and transition.to_status not in STATUS_TRANSITIONS[transition.from_status]
			):
				raise InvariantViolation(
					f"Illegal status transition {transition.from_status.value} -> {transition.to_status.value}"
				)
			if transition.iteration < last_iteration:
				raise InvariantViolation("Iteration counter decreased")
			last_iteration = transition.iteration

		if previous and (previous.to_phase != session.phase or previous.to_status != session.status):
			raise InvariantViolation("Session state does not match its last recorded transition")
