"""Shared test fixtures and helpers for brainstorm-orchestrator tests."""

import asyncio
import inspect
import json
import re
from collections import defaultdict
from pathlib import Path
from typing import Any, Callable, Optional

from brainstorm_orchestrator.config import Config
from brainstorm_orchestrator.orchestrator.gate import ClarificationQuestions, PlanDecision, PlanReview
from brainstorm_orchestrator.providers import Generation, GenerationConfig
from brainstorm_orchestrator.session.models import (
	Candidate,
	Evaluation,
	ExecutionMode,
	Finding,
	Phase,
	Plan,
	PlanStatus,
	Role,
	Session,
	SessionSnapshot,
)


def fenced(data: dict) -> str:
	return f"Here you go:\n```json\n{json.dumps(data)}\n```\n"


def plan_response(steps: Optional[list[str]] = None, **extra: Any) -> str:
	return fenced({"steps": steps or ["Survey existing approaches", "Identify constraints"], **extra})


def clarification_response(questions: list[str], assumptions: list[str]) -> str:
	return fenced({"questions": questions, "assumptions": assumptions})


def research_response(topic: str = "prior art", content: str = "Detailed notes", summary: str = "Key points") -> str:
	return fenced({"topic": topic, "content": content, "summary": summary})


def candidate_response(variant: str, content: str, rationale: str = "secret reasoning") -> str:
	return fenced({"variant": variant, "content": content, "rationale": rationale})


def scores_response(overall: float, rationale: str = "solid") -> str:
	return fenced({
		"quality": overall,
		"clarity": overall,
		"specificity": overall,
		"overall": overall,
		"rationale": rationale,
	})


def prompt_iteration(prompt: str) -> int:
	match = re.search(r"^Iteration: (\d+)$", prompt, re.MULTILINE)
	return int(match.group(1)) if match else 0


def prompt_member(prompt: str) -> Optional[int]:
	"""Brainstormer member number from its assignment line, if present."""
	match = re.search(r"Produce candidate variant (\d+)", prompt)
	return int(match.group(1)) if match else None


class ScriptedGenerator:
	"""
	Fake TextGenerator answering each role with a scripted responder.

	A responder is called with (prompt, call_number) where call_number counts
	calls to that role starting at 1. It returns response text, raises, or
	returns an Exception instance to be raised. Async responders are awaited.
	"""

	def __init__(
		self,
		responders: Optional[dict[Role, Callable[[str, int], Any]]] = None,
		input_units: int = 100,
		output_units: int = 50,
	):
		self.responders = {**default_responders(), **(responders or {})}
		self.input_units = input_units
		self.output_units = output_units
		self.calls: list[tuple[Role, str]] = []
		self._counts: dict[Role, int] = defaultdict(int)

	def prompts(self, role: Role) -> list[str]:
		return [prompt for r, prompt in self.calls if r == role]

	async def generate(self, role: Role, prompt: str, config: GenerationConfig) -> Generation:
		self._counts[role] += 1
		self.calls.append((role, prompt))
		result = self.responders[role](prompt, self._counts[role])
		if inspect.isawaitable(result):
			result = await result
		if isinstance(result, Exception):
			raise result
		return Generation(
			content=result,
			input_units=self.input_units,
			output_units=self.output_units,
			model=config.model,
		)


def default_responders() -> dict[Role, Callable[[str, int], Any]]:
	return {
		Role.PLANNER: lambda prompt, n: plan_response(),
		Role.EXPERT: lambda prompt, n: clarification_response(
			["Who is the audience?"], ["Developers"],
		),
		Role.RESEARCHER: lambda prompt, n: research_response(topic=f"topic {n}"),
		Role.BRAINSTORMER: lambda prompt, n: candidate_response(f"variant {n}", f"candidate body {n}"),
		Role.EVALUATOR: lambda prompt, n: scores_response(7.0),
	}


class ScriptedGate:
	"""HumanGate with canned answers that records what it was asked."""

	def __init__(
		self,
		plan_reviews: Optional[list[PlanReview]] = None,
		answers: Optional[dict[str, str]] = None,
		overrides: Optional[Callable[[list[Candidate]], dict[str, float]]] = None,
		block: bool = False,
	):
		self.plan_reviews = list(plan_reviews or [])
		self.answers = answers or {}
		self.overrides = overrides
		self.block = block
		self.plans_seen: list[Plan] = []
		self.questions_seen: list[ClarificationQuestions] = []
		self.evaluations_seen: list[list[Evaluation]] = []

	async def _maybe_block(self) -> None:
		if self.block:
			await asyncio.Event().wait()

	async def review_plan(self, plan: Plan) -> PlanReview:
		self.plans_seen.append(plan)
		await self._maybe_block()
		if self.plan_reviews:
			return self.plan_reviews.pop(0)
		return PlanReview(decision=PlanDecision.APPROVE, steps=list(plan.steps))

	async def answer_questions(self, questions: ClarificationQuestions) -> dict[str, str]:
		self.questions_seen.append(questions)
		await self._maybe_block()
		return dict(self.answers)

	async def review_evaluations(self, candidates: list[Candidate], evaluations: list[Evaluation]) -> dict[str, float]:
		self.evaluations_seen.append(evaluations)
		await self._maybe_block()
		return self.overrides(candidates) if self.overrides else {}


def make_config(tmp_path: Path, **overrides: Any) -> Config:
	"""Fast, isolated config: autonomous mode, no backoff delay, short grace period."""
	config = Config(config_dir=tmp_path / "config", data_dir=tmp_path / "data")
	config.mode = ExecutionMode.AUTONOMOUS
	config.backoff_base = 0.0
	config.backoff_max = 0.0
	config.cancel_grace = 0.5
	config.agent_timeout = 5.0
	config.provider_max_retries = 1
	for key, value in overrides.items():
		setattr(config, key, value)
	config.validate()
	config.ensure_dirs()
	return config


def make_snapshot(
	request: str = "Generate onboarding email variants for a developer tool",
	iteration: int = 1,
	phase: Phase = Phase.EVALUATING,
) -> SessionSnapshot:
	"""A consistent snapshot with an approved plan, one finding, and two scored candidates."""
	session = Session(request=request, iteration=iteration, phase=phase, max_iterations=3)
	plan = Plan(steps=["Survey tone options", "Draft subject lines"], status=PlanStatus.APPROVED)
	finding = Finding(
		role_instance="researcher-1",
		topic="tone",
		content="Long raw research transcript " * 10,
		summary="Friendly tone converts better",
	)
	first = Candidate(
		id="candidate-a",
		role_instance="brainstormer-1",
		variant="friendly",
		content="Hi there!",
		rationale="generation reasoning A",
		iteration=1,
	)
	second = Candidate(
		id="candidate-b",
		role_instance="brainstormer-2",
		variant="formal",
		content="Dear user,",
		rationale="generation reasoning B",
		iteration=1,
	)
	evaluations = [
		Evaluation(candidate_id="candidate-a", iteration=1, quality=6, clarity=6, specificity=6, overall=6, rationale="too casual"),
		Evaluation(candidate_id="candidate-b", iteration=1, quality=8, clarity=8, specificity=8, overall=8, rationale="clear"),
	]
	return SessionSnapshot(
		session=session,
		plans=[plan],
		findings=[finding],
		candidates=[first, second],
		evaluations=evaluations,
	)
