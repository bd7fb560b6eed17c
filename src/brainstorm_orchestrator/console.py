"""
Terminal supervision for interactive sessions.

A daemon thread reads stdin lines and hands them to the event loop. While
a gate is waiting, a line is the answer to it (except `s` and `q`, which
skip the gate or quit). Otherwise a line is a control command:

	p            pause at the next phase boundary
	r            resume a paused session
	s            skip (resolve a pending gate with its automatic answer)
	q            quit (checkpoint and exit)
	f <text>     stop the current round and rerun it with this feedback
	m <mode>     switch to interactive or autonomous
	i <n>        set max iterations
"""

import asyncio
import logging
import sys
import threading
from typing import Optional, TextIO

from rich.console import Console

from .orchestrator.gate import ClarificationQuestions, PlanDecision, PlanReview
from .orchestrator.interrupts import InterruptChannel
from .session.models import Candidate, Evaluation, ExecutionMode, Plan

logger = logging.getLogger(__name__)

HELP = "commands: p pause | r resume | s skip | q quit | f <feedback> | m <interactive|autonomous> | i <max iterations>"


def parse_overrides(line: str, candidates: list[Candidate]) -> dict[str, float]:
	"""
	Parse '2=9.5, 3=7' (1-based candidate numbers) into candidate id -> score.

	Raises:
		ValueError: On a malformed entry or unknown candidate number
	"""
	overrides = {}
	for part in line.replace(",", " ").split():
		number, sep, value = part.partition("=")
		if not sep:
			raise ValueError(f"Expected <number>=<score>, got '{part}'")
		index = int(number)
		if not 1 <= index <= len(candidates):
			raise ValueError(f"No candidate number {index}")
		overrides[candidates[index - 1].id] = float(value)
	return overrides


class ConsoleControl:
	"""Routes terminal input to the interrupt channel or to a waiting gate."""

	def __init__(
		self,
		channel: InterruptChannel,
		console: Optional[Console] = None,
		stream: Optional[TextIO] = None,
	):
		self.channel = channel
		self.console = console or Console(stderr=True)
		self.stream = stream or sys.stdin
		self._answers: asyncio.Queue[str] = asyncio.Queue()
		self._gate_open = False
		self._loop: Optional[asyncio.AbstractEventLoop] = None

	def start(self) -> None:
		"""Start reading stdin on a daemon thread."""
		self._loop = asyncio.get_running_loop()
		thread = threading.Thread(target=self._read_lines, name="console-input", daemon=True)
		thread.start()
		self.console.print(f"[dim]{HELP}[/dim]")

	def _read_lines(self) -> None:
		for line in self.stream:
			self._loop.call_soon_threadsafe(self.feed, line.rstrip("\n"))

	def feed(self, line: str) -> None:
		"""Handle one input line."""
		line = line.strip()
		if self._gate_open and line not in ("s", "q"):
			self._answers.put_nowait(line)
			return
		if line:
			self.handle_command(line)

	def handle_command(self, line: str) -> bool:
		"""Translate a command line into a signal. Returns False if not understood."""
		command, _, arg = line.partition(" ")
		arg = arg.strip()
		try:
			if command == "p":
				self.channel.pause()
			elif command == "r":
				self.channel.resume()
			elif command == "s":
				self.channel.skip()
			elif command == "q":
				self.channel.quit()
			elif command == "f" and arg:
				self.channel.stop_with_feedback(arg)
			elif command == "m" and arg:
				self.channel.change_mode(ExecutionMode(arg))
			elif command == "i" and arg:
				self.channel.adjust_max_iterations(int(arg))
			else:
				self.console.print(f"[yellow]Unknown command '{line}'[/yellow] [dim]{HELP}[/dim]")
				return False
		except ValueError as e:
			self.console.print(f"[red]Invalid command '{line}': {e}[/red]")
			return False
		return True

	async def _ask(self, prompt: str) -> str:
		self.console.print(prompt)
		self._gate_open = True
		try:
			return await self._answers.get()
		finally:
			self._gate_open = False

	# -- HumanGate -----------------------------------------------------

	async def review_plan(self, plan: Plan) -> PlanReview:
		steps = "\n".join(f"  {i}. {step}" for i, step in enumerate(plan.steps, start=1))
		answer = await self._ask(
			f"[bold]Proposed plan:[/bold]\n{steps}\n"
			"[cyan]Enter to approve, 'n <reason>' to reject, or 'e step one | step two' to replace the steps[/cyan]"
		)
		if answer.startswith("n"):
			return PlanReview(decision=PlanDecision.REJECT, notes=answer[1:].strip())
		if answer.startswith("e "):
			new_steps = [s.strip() for s in answer[2:].split("|") if s.strip()]
			if new_steps:
				return PlanReview(decision=PlanDecision.MODIFY, steps=new_steps, notes="edited by supervisor")
		return PlanReview(decision=PlanDecision.APPROVE, steps=list(plan.steps))

	async def answer_questions(self, questions: ClarificationQuestions) -> dict[str, str]:
		answers = {}
		defaults = questions.default_answers()
		for question in questions.questions:
			hint = f" [dim](default: {defaults[question]})[/dim]" if defaults[question] else ""
			answers[question] = await self._ask(f"[bold]?[/bold] {question}{hint}")
		return answers

	async def review_evaluations(
		self, candidates: list[Candidate], evaluations: list[Evaluation]
	) -> dict[str, float]:
		scored = {e.candidate_id: e for e in evaluations}
		lines = []
		for i, candidate in enumerate(candidates, start=1):
			evaluation = scored.get(candidate.id)
			score = f"{evaluation.overall:.1f}" if evaluation else "-"
			lines.append(f"  {i}. {candidate.variant}: {score}")
		while True:
			answer = await self._ask(
				"[bold]Scores:[/bold]\n" + "\n".join(lines) +
				"\n[cyan]Enter to accept, or override with e.g. '2=9.5, 3=7'[/cyan]"
			)
			if not answer:
				return {}
			try:
				return parse_overrides(answer, candidates)
			except ValueError as e:
				self.console.print(f"[red]{e}[/red]")
