"""
Context Filter - decides what each agent role is allowed to see.

	Role          Sees
	planner       original request
	expert        request + plan
	researcher    request + plan + clarified requirements
	brainstormer  request + clarified requirements + research findings summary
	evaluator     request + the candidates under evaluation

User feedback given through the interrupt channel reaches every role
except the evaluator. The evaluator never receives a candidate's
generation rationale, research output, or any other role's work.
"""

from dataclasses import dataclass, replace
from typing import Optional

from ..session.models import Phase, Role, SessionSnapshot, rank_evaluations


SUMMARY_CHARS = 400


@dataclass(frozen=True)
class CandidateView:
	"""What an evaluator may know about a candidate."""
	id: str
	variant: str
	content: str


@dataclass(frozen=True)
class RefinementTarget:
	"""A previous candidate a brainstormer is asked to improve."""
	candidate_id: str
	variant: str
	content: str
	score: float
	critique: str


@dataclass(frozen=True)
class FilteredContext:
	"""Context package for one agent invocation."""
	role: Role
	phase: Phase
	request: str
	iteration: int = 0
	plan_steps: tuple[str, ...] = ()
	clarified_requirements: tuple[str, ...] = ()
	findings_summary: str = ""
	candidates: tuple[CandidateView, ...] = ()
	refinement_targets: tuple[RefinementTarget, ...] = ()
	feedback: tuple[str, ...] = ()
	assignment: str = ""

	def with_assignment(self, assignment: str) -> "FilteredContext":
		return replace(self, assignment=assignment)

	def to_prompt(self) -> str:
		"""Render the context as prompt text for the agent."""
		lines = [
			f"# Role: {self.role.value}",
			"",
			"## Request",
			self.request,
			"",
		]

		if self.plan_steps:
			lines.append("## Plan")
			for i, step in enumerate(self.plan_steps, start=1):
				lines.append(f"{i}. {step}")
			lines.append("")

		if self.clarified_requirements:
			lines.append("## Clarified Requirements")
			for requirement in self.clarified_requirements:
				lines.append(f"- {requirement}")
			lines.append("")

		if self.findings_summary:
			lines.append("## Research Summary")
			lines.append(self.findings_summary)
			lines.append("")

		if self.refinement_targets:
			lines.append("## Candidates To Refine")
			for target in self.refinement_targets:
				lines.append(f"### {target.variant} (score {target.score:.1f})")
				lines.append(target.content)
				if target.critique:
					lines.append(f"Critique: {target.critique}")
				lines.append("")

		if self.candidates:
			lines.append("## Candidates Under Evaluation")
			for candidate in self.candidates:
				lines.append(f"### {candidate.id}: {candidate.variant}")
				lines.append(candidate.content)
				lines.append("")

		if self.feedback:
			lines.append("## Supervisor Feedback")
			for item in self.feedback:
				lines.append(f"- {item}")
			lines.append("")

		if self.assignment:
			lines.append("## Your Assignment")
			lines.append(self.assignment)
			lines.append("")

		if self.iteration:
			lines.append(f"Iteration: {self.iteration}")

		return "\n".join(lines).rstrip() + "\n"


def summarize_findings(snapshot: SessionSnapshot) -> str:
	"""Condense findings into topic/summary bullets, never raw transcripts."""
	lines = []
	for finding in snapshot.findings:
		summary = finding.summary.strip() or finding.content.strip()
		if len(summary) > SUMMARY_CHARS:
			summary = summary[:SUMMARY_CHARS - 3].rstrip() + "..."
		lines.append(f"- {finding.topic}: {summary}")
	return "\n".join(lines)


def _refinement_targets(snapshot: SessionSnapshot, top_k: int) -> tuple[RefinementTarget, ...]:
	previous = snapshot.session.iteration - 1
	if previous < 1:
		return ()
	by_id = {c.id: c for c in snapshot.candidates}
	ranked = rank_evaluations(snapshot.candidates, snapshot.evaluations, previous)
	return tuple(
		RefinementTarget(
			candidate_id=e.candidate_id,
			variant=by_id[e.candidate_id].variant,
			content=by_id[e.candidate_id].content,
			score=e.final_score,
			critique=e.rationale,
		)
		for e in ranked[:top_k]
		if e.candidate_id in by_id
	)


def filter_context(
	snapshot: SessionSnapshot,
	role: Role,
	phase: Phase,
	top_k: int = 2,
	candidate_ids: Optional[list[str]] = None,
) -> FilteredContext:
	"""
	Compute the context visible to one role in one phase.

	Args:
		snapshot: Session aggregate to read from
		role: Role being invoked
		phase: Phase the invocation belongs to
		top_k: Number of previous candidates offered for refinement
		candidate_ids: Evaluator only - restrict to these candidates

	Returns:
		FilteredContext for the invocation
	"""
	session = snapshot.session
	base = FilteredContext(role=role, phase=phase, request=session.request, iteration=session.iteration)
	feedback = tuple(session.feedback)
	plan = snapshot.approved_plan()
	plan_steps = tuple(plan.steps) if plan else ()

	if role == Role.PLANNER:
		return replace(base, feedback=feedback)

	if role == Role.EXPERT:
		return replace(base, plan_steps=plan_steps, feedback=feedback)

	if role == Role.RESEARCHER:
		return replace(
			base,
			plan_steps=plan_steps,
			clarified_requirements=tuple(session.clarified_requirements),
			feedback=feedback,
		)

	if role == Role.BRAINSTORMER:
		return replace(
			base,
			clarified_requirements=tuple(session.clarified_requirements),
			findings_summary=summarize_findings(snapshot),
			refinement_targets=_refinement_targets(snapshot, top_k),
			feedback=feedback,
		)

	if role == Role.EVALUATOR:
		candidates = snapshot.candidates_for_iteration(session.iteration)
		if candidate_ids is not None:
			wanted = set(candidate_ids)
			candidates = [c for c in candidates if c.id in wanted]
		return replace(
			base,
			candidates=tuple(CandidateView(id=c.id, variant=c.variant, content=c.content) for c in candidates),
		)

	raise ValueError(f"Unknown role: {role}")
