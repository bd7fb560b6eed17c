"""
Human gates - the points where an interactive session waits for its supervisor.

The orchestrator consults a HumanGate to approve plans, answer clarifying
questions and override evaluation scores. AutoApproveGate gives the
automatic answer to each, and is what autonomous mode and a `skip` use.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Protocol

from ..session.models import Candidate, Evaluation, Plan

logger = logging.getLogger(__name__)


class PlanDecision(str, Enum):
	APPROVE = "approve"
	MODIFY = "modify"
	REJECT = "reject"


@dataclass
class PlanReview:
	"""Supervisor verdict on a proposed plan."""
	decision: PlanDecision = PlanDecision.APPROVE
	steps: list[str] = field(default_factory=list)
	notes: str = ""


@dataclass
class ClarificationQuestions:
	"""Questions from the Expert with the assumption to use for each."""
	questions: list[str]
	assumptions: list[str] = field(default_factory=list)

	def default_answers(self) -> dict[str, str]:
		"""Pair each question with its assumption (or an empty answer)."""
		return {
			q: self.assumptions[i] if i < len(self.assumptions) else ""
			for i, q in enumerate(self.questions)
		}


class HumanGate(Protocol):
	"""Supervisor decisions the workflow waits on in interactive mode."""

	async def review_plan(self, plan: Plan) -> PlanReview:
		...

	async def answer_questions(self, questions: ClarificationQuestions) -> dict[str, str]:
		"""Map each question to its answer. Unanswered questions fall back to their assumption."""
		...

	async def review_evaluations(
		self, candidates: list[Candidate], evaluations: list[Evaluation]
	) -> dict[str, float]:
		"""Map candidate id to an override score in [0, 10]."""
		...


class AutoApproveGate:
	"""Approves every plan, accepts every assumption, overrides nothing."""

	async def review_plan(self, plan: Plan) -> PlanReview:
		return PlanReview(decision=PlanDecision.APPROVE, steps=list(plan.steps))

	async def answer_questions(self, questions: ClarificationQuestions) -> dict[str, str]:
		return questions.default_answers()

	async def review_evaluations(
		self, candidates: list[Candidate], evaluations: list[Evaluation]
	) -> dict[str, float]:
		return {}


def clarified_requirements(questions: ClarificationQuestions, answers: Optional[dict[str, str]]) -> list[str]:
	"""Turn question/answer pairs into requirement lines stored on the session."""
	merged = questions.default_answers()
	for question, answer in (answers or {}).items():
		if answer and answer.strip():
			merged[question] = answer.strip()
	return [f"{q} -> {a}" if a else q for q, a in merged.items()]


def valid_overrides(overrides: dict[str, float], evaluations: list[Evaluation]) -> dict[str, float]:
	"""Drop overrides for unknown candidates or outside [0, 10]."""
	known = {e.candidate_id for e in evaluations}
	result = {}
	for candidate_id, value in overrides.items():
		if candidate_id not in known:
			logger.warning(f"Ignoring override for unknown candidate {candidate_id}")
			continue
		try:
			score = float(value)
		except (TypeError, ValueError):
			logger.warning(f"Ignoring non-numeric override for {candidate_id}: {value!r}")
			continue
		if not 0 <= score <= 10:
			logger.warning(f"Ignoring out-of-range override for {candidate_id}: {score}")
			continue
		result[candidate_id] = score
	return result
