"""
Role instructions and output parsing.

Each role is asked to answer with a ```json block. Parsing follows the same
approach as plan generation elsewhere: look for a fenced block first, then
for a bare JSON object, then fall back to a plain-text reading where the
role allows one.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional

from ..errors import ProviderError
from ..session.models import ExecutionPolicy, Role, TeamDescriptor

logger = logging.getLogger(__name__)


ROLE_INSTRUCTIONS: dict[Role, str] = {
	Role.PLANNER: "\n".join([
		"You are the Planner of a brainstorming team.",
		"Break the request into 3-6 concrete steps for researchers and brainstormers.",
		"Respond with a ```json block:",
		'{"steps": ["..."], "notes": "...", "team": {"researchers": 2, "brainstormers": 3}}',
	]),
	Role.EXPERT: "\n".join([
		"You are the domain Expert. The request may be ambiguous.",
		"List the questions you would ask the requester, and the assumption you",
		"would make for each if no answer is given.",
		"Respond with a ```json block:",
		'{"questions": ["..."], "assumptions": ["..."]}',
	]),
	Role.RESEARCHER: "\n".join([
		"You are a Researcher. Investigate your assigned plan step.",
		"Respond with a ```json block:",
		'{"topic": "...", "content": "...", "summary": "two or three sentences"}',
	]),
	Role.BRAINSTORMER: "\n".join([
		"You are a Brainstormer. Produce one complete candidate solution.",
		"If candidates to refine are given, improve on the one you are assigned.",
		"Respond with a ```json block:",
		'{"variant": "short label", "content": "...", "rationale": "..."}',
	]),
	Role.EVALUATOR: "\n".join([
		"You are the Evaluator. Score the candidate under evaluation from 0 to 10",
		"on quality, clarity and specificity, and give an overall score.",
		"Respond with a ```json block:",
		'{"quality": 0, "clarity": 0, "specificity": 0, "overall": 0, "rationale": "..."}',
	]),
}


@dataclass
class PlanProposal:
	steps: list[str]
	notes: str = ""
	team: Optional[TeamDescriptor] = None


@dataclass
class ClarificationRequest:
	questions: list[str] = field(default_factory=list)
	assumptions: list[str] = field(default_factory=list)


@dataclass
class ResearchResult:
	topic: str
	content: str
	summary: str = ""


@dataclass
class GeneratedCandidate:
	variant: str
	content: str
	rationale: str = ""


@dataclass
class ScoreCard:
	quality: float
	clarity: float
	specificity: float
	overall: float
	rationale: str = ""


def extract_json(response: str) -> Optional[dict[str, Any]]:
	"""Pull the first JSON object out of a model response."""
	json_match = re.search(r"```json\s*(.*?)\s*```", response, re.DOTALL)
	if json_match:
		json_str = json_match.group(1)
	else:
		json_match = re.search(r"\{[\s\S]*\}", response)
		if not json_match:
			return None
		json_str = json_match.group(0)

	try:
		data = json.loads(json_str)
	except json.JSONDecodeError as e:
		logger.debug(f"Failed to parse JSON from response: {e}")
		return None
	return data if isinstance(data, dict) else None


def _lines(text: str) -> list[str]:
	"""Non-empty lines with list markers stripped."""
	result = []
	for line in text.splitlines():
		line = re.sub(r"^\s*(?:[-*]|\d+[.)])\s*", "", line).strip()
		if line:
			result.append(line)
	return result


def _str_list(value: Any) -> list[str]:
	if not isinstance(value, list):
		return []
	return [str(v).strip() for v in value if str(v).strip()]


def parse_plan(response: str, default_team: TeamDescriptor, max_members: int = 8) -> PlanProposal:
	"""
	Parse a Planner response.

	A team proposal is clamped to [1, max_members] per role and inherits
	the execution policy of the default team.
	"""
	data = extract_json(response)
	if data is None:
		steps = _lines(response)
		if not steps:
			raise ProviderError("Planner returned an empty plan", transient=True)
		return PlanProposal(steps=steps)

	steps = _str_list(data.get("steps"))
	if not steps:
		raise ProviderError("Planner returned a plan without steps", transient=True)

	team = None
	team_data = data.get("team")
	if isinstance(team_data, dict):
		try:
			researchers = int(team_data.get("researchers", default_team.researchers))
			brainstormers = int(team_data.get("brainstormers", default_team.brainstormers))
		except (TypeError, ValueError):
			logger.warning(f"Ignoring malformed team proposal: {team_data}")
		else:
			team = TeamDescriptor(
				researchers=min(max(researchers, 1), max_members),
				brainstormers=min(max(brainstormers, 1), max_members),
				policy=default_team.policy,
				first_n=default_team.first_n if default_team.policy == ExecutionPolicy.FIRST_N else None,
			)

	return PlanProposal(steps=steps, notes=str(data.get("notes", "")), team=team)


def parse_clarification(response: str) -> ClarificationRequest:
	data = extract_json(response)
	if data is None:
		questions = [line for line in _lines(response) if line.endswith("?")]
		return ClarificationRequest(questions=questions)
	return ClarificationRequest(
		questions=_str_list(data.get("questions")),
		assumptions=_str_list(data.get("assumptions")),
	)


def parse_research(response: str, default_topic: str) -> ResearchResult:
	data = extract_json(response)
	if data is None:
		content = response.strip()
		if not content:
			raise ProviderError("Researcher returned no content", transient=True)
		return ResearchResult(topic=default_topic, content=content)
	content = str(data.get("content", "")).strip()
	if not content:
		raise ProviderError("Researcher returned no content", transient=True)
	return ResearchResult(
		topic=str(data.get("topic") or default_topic),
		content=content,
		summary=str(data.get("summary", "")),
	)


def parse_candidate(response: str, default_variant: str) -> GeneratedCandidate:
	data = extract_json(response)
	if data is None:
		content = response.strip()
		if not content:
			raise ProviderError("Brainstormer returned no content", transient=True)
		return GeneratedCandidate(variant=default_variant, content=content)
	content = str(data.get("content", "")).strip()
	if not content:
		raise ProviderError("Brainstormer returned no content", transient=True)
	return GeneratedCandidate(
		variant=str(data.get("variant") or default_variant),
		content=content,
		rationale=str(data.get("rationale", "")),
	)


def _score(data: dict[str, Any], key: str) -> float:
	try:
		value = float(data[key])
	except (KeyError, TypeError, ValueError) as e:
		raise ProviderError(f"Evaluator response missing score '{key}'", transient=True) from e
	return min(max(value, 0.0), 10.0)


def parse_scores(response: str) -> ScoreCard:
	"""Parse Evaluator scores; an unreadable response is retried."""
	data = extract_json(response)
	if data is None:
		raise ProviderError("Evaluator response contained no JSON scores", transient=True)
	quality = _score(data, "quality")
	clarity = _score(data, "clarity")
	specificity = _score(data, "specificity")
	if "overall" in data:
		overall = _score(data, "overall")
	else:
		overall = round((quality + clarity + specificity) / 3, 2)
	return ScoreCard(
		quality=quality,
		clarity=clarity,
		specificity=specificity,
		overall=overall,
		rationale=str(data.get("rationale", "")),
	)
