"""
Session State Store - the authoritative in-memory record of one session.

Collections are append-only. Session-level scalars change only through
compare_and_set, which rejects updates made against stale values and
records every phase/status change as a transition. Readers take a deep
snapshot instead of touching the live structures.
"""

import logging
import math
from datetime import datetime
from typing import Any, Iterable, Optional

from ..errors import InvariantViolation, StaleStateError
from .models import (
	PHASE_TRANSITIONS,
	PLAN_TRANSITIONS,
	STATUS_TRANSITIONS,
	Candidate,
	CostRecord,
	Evaluation,
	Finding,
	Plan,
	PlanStatus,
	Session,
	SessionSnapshot,
	TeamDescriptor,
	TransitionRecord,
	rank_evaluations,
)

logger = logging.getLogger(__name__)


class SessionStateStore:
	"""
	Single-writer store for a session aggregate.

	Usage:
		state = SessionStateStore.new(Session(request="generate prompts"))
		state.compare_and_set({"phase": Phase.INIT}, phase=Phase.PLANNING)
		state.add_candidates([candidate])
		snapshot = state.snapshot()
	"""

	# total_cost is derived from the cost records
	IMMUTABLE_FIELDS = frozenset({"id", "created_at", "request", "total_cost"})

	def __init__(self, snapshot: SessionSnapshot):
		# Own a private copy so callers can't mutate live state through their reference
		snapshot = snapshot.model_copy(deep=True)
		self._session = snapshot.session
		self._plans: list[Plan] = snapshot.plans
		self._findings: list[Finding] = snapshot.findings
		self._candidates: list[Candidate] = snapshot.candidates
		self._evaluations: list[Evaluation] = snapshot.evaluations
		self._cost_records: list[CostRecord] = snapshot.cost_records
		self._transitions: list[TransitionRecord] = snapshot.transitions
		self._team: Optional[TeamDescriptor] = snapshot.team

	@classmethod
	def new(cls, session: Session) -> "SessionStateStore":
		"""Create a store for a fresh session."""
		return cls(SessionSnapshot(session=session))

	@property
	def session(self) -> Session:
		"""Current session scalars (a copy)."""
		return self._session.model_copy(deep=True)

	@property
	def session_id(self) -> str:
		return self._session.id

	@property
	def team(self) -> Optional[TeamDescriptor]:
		return self._team.model_copy() if self._team else None

	def snapshot(self) -> SessionSnapshot:
		"""Return a deep, detached copy of the full aggregate."""
		return SessionSnapshot(
			session=self._session,
			plans=self._plans,
			findings=self._findings,
			candidates=self._candidates,
			evaluations=self._evaluations,
			cost_records=self._cost_records,
			transitions=self._transitions,
			team=self._team,
		).model_copy(deep=True)

	# -- Scalar updates ------------------------------------------------

	def compare_and_set(self, expected: dict[str, Any], **updates: Any) -> Session:
		"""
		Update session scalars if the current values match `expected`.

		Args:
			expected: Field name -> value that must currently hold
			**updates: Field name -> new value

		Returns:
			The updated Session (a copy)

		Raises:
			StaleStateError: If any expected value differs
			InvariantViolation: If the update breaks a session invariant
		"""
		current = self._session
		for key, value in expected.items():
			if not hasattr(current, key):
				raise StaleStateError(f"Unknown session field: {key}")
			if getattr(current, key) != value:
				raise StaleStateError(
					f"Expected {key}={value!r}, found {getattr(current, key)!r}"
				)

		invalid = (set(updates) - set(Session.model_fields)) | (set(updates) & self.IMMUTABLE_FIELDS)
		if invalid:
			raise InvariantViolation(f"Fields cannot be updated: {sorted(invalid)}")

		try:
			updated = Session.model_validate({**current.model_dump(), **updates})
		except ValueError as e:
			raise InvariantViolation(f"Invalid session update: {e}") from e

		if updated.iteration < current.iteration:
			raise InvariantViolation(
				f"Iteration cannot decrease ({current.iteration} -> {updated.iteration})"
			)
		if updated.iteration > updated.max_iterations:
			raise InvariantViolation(
				f"Iteration {updated.iteration} exceeds max {updated.max_iterations}"
			)
		if updated.phase != current.phase and updated.phase not in PHASE_TRANSITIONS[current.phase]:
			raise InvariantViolation(
				f"Illegal phase transition {current.phase.value} -> {updated.phase.value}"
			)
		if updated.status != current.status and updated.status not in STATUS_TRANSITIONS[current.status]:
			raise InvariantViolation(
				f"Illegal status transition {current.status.value} -> {updated.status.value}"
			)

		if updated.phase != current.phase or updated.status != current.status:
			self._transitions.append(TransitionRecord(
				sequence=len(self._transitions) + 1,
				from_phase=current.phase,
				to_phase=updated.phase,
				from_status=current.status,
				to_status=updated.status,
				iteration=updated.iteration,
			))
			logger.debug(
				f"Session {current.id}: {current.phase.value}/{current.status.value} -> "
				f"{updated.phase.value}/{updated.status.value} (iteration {updated.iteration})"
			)

		self._session = updated
		return updated.model_copy(deep=True)

	def set_team(self, team: TeamDescriptor) -> None:
		self._team = team.model_copy()

	# -- Plans ---------------------------------------------------------

	def add_plan(self, plan: Plan) -> Plan:
		"""Append a plan version."""
		if any(p.id == plan.id and p.version == plan.version for p in self._plans):
			raise InvariantViolation(f"Plan {plan.id} v{plan.version} already exists")
		if plan.status == PlanStatus.APPROVED and self.approved_plan() is not None:
			raise InvariantViolation("Another plan is already approved")
		self._plans.append(plan.model_copy(deep=True))
		return plan

	def set_plan_status(self, plan_id: str, version: int, status: PlanStatus) -> Plan:
		"""Move a plan version along its approval lifecycle."""
		for i, plan in enumerate(self._plans):
			if plan.id == plan_id and plan.version == version:
				break
		else:
			raise InvariantViolation(f"Unknown plan {plan_id} v{version}")

		if status not in PLAN_TRANSITIONS[plan.status]:
			raise InvariantViolation(
				f"Illegal plan transition {plan.status.value} -> {status.value}"
			)
		if status == PlanStatus.APPROVED and self.approved_plan() is not None:
			raise InvariantViolation("Another plan is already approved")

		updates: dict[str, Any] = {"status": status}
		if status == PlanStatus.APPROVED:
			updates["approved_at"] = datetime.now().isoformat()
		self._plans[i] = plan.model_copy(update=updates)
		return self._plans[i].model_copy(deep=True)

	def approved_plan(self) -> Optional[Plan]:
		for plan in self._plans:
			if plan.status == PlanStatus.APPROVED:
				return plan.model_copy(deep=True)
		return None

	# -- Append-only collections ---------------------------------------

	def add_findings(self, findings: Iterable[Finding]) -> None:
		for finding in findings:
			self._findings.append(finding.model_copy(deep=True))

	def add_candidates(self, candidates: Iterable[Candidate]) -> None:
		known = {c.id for c in self._candidates}
		for candidate in candidates:
			if candidate.id in known:
				raise InvariantViolation(f"Candidate {candidate.id} already exists")
			if candidate.parent_id and candidate.parent_id not in known:
				raise InvariantViolation(
					f"Candidate {candidate.id} references unknown parent {candidate.parent_id}"
				)
			self._candidates.append(candidate.model_copy(deep=True))
			known.add(candidate.id)

	def add_evaluations(self, evaluations: Iterable[Evaluation]) -> None:
		known = {c.id for c in self._candidates}
		scored = {(e.candidate_id, e.iteration) for e in self._evaluations}
		for evaluation in evaluations:
			if evaluation.candidate_id not in known:
				raise InvariantViolation(
					f"Evaluation references unknown candidate {evaluation.candidate_id}"
				)
			key = (evaluation.candidate_id, evaluation.iteration)
			if key in scored:
				raise InvariantViolation(
					f"Candidate {evaluation.candidate_id} already evaluated in iteration {evaluation.iteration}"
				)
			self._evaluations.append(evaluation.model_copy(deep=True))
			scored.add(key)

	def add_cost_records(self, records: Iterable[CostRecord]) -> None:
		"""Append cost records and recompute the session total from them."""
		known = {r.id for r in self._cost_records}
		added = False
		for record in records:
			if record.id in known:
				continue
			self._cost_records.append(record)
			known.add(record.id)
			added = True
		if added:
			total = math.fsum(r.cost for r in self._cost_records)
			self._session = self._session.model_copy(update={"total_cost": total})

	# -- Queries -------------------------------------------------------

	def candidates_for_iteration(self, iteration: int) -> list[Candidate]:
		return [c.model_copy(deep=True) for c in self._candidates if c.iteration == iteration]

	def evaluations_for_iteration(self, iteration: int) -> list[Evaluation]:
		return [e.model_copy(deep=True) for e in self._evaluations if e.iteration == iteration]

	def ranked_evaluations(self, iteration: int) -> list[Evaluation]:
		"""
		Evaluations of an iteration, best first.

		Ties on final score keep candidate creation order.
		"""
		ranked = rank_evaluations(self._candidates, self._evaluations, iteration)
		return [e.model_copy(deep=True) for e in ranked]

	def best_evaluation(self, iteration: int) -> Optional[Evaluation]:
		ranked = self.ranked_evaluations(iteration)
		return ranked[0] if ranked else None

	def top_candidates(self, k: int, iteration: int) -> list[tuple[Candidate, Evaluation]]:
		"""The k best-scored candidates of an iteration with their evaluations."""
		by_id = {c.id: c for c in self._candidates}
		return [
			(by_id[e.candidate_id].model_copy(deep=True), e)
			for e in self.ranked_evaluations(iteration)[:k]
		]

	def get_candidate(self, candidate_id: str) -> Optional[Candidate]:
		for candidate in self._candidates:
			if candidate.id == candidate_id:
				return candidate.model_copy(deep=True)
		return None
