"""
Workflow Orchestrator - drives a brainstorming session through its phases.

	init -> planning -> (clarifying) -> working -> evaluating -> deciding
	deciding -> working (next iteration) | reporting -> done

Each phase computes its results from a snapshot, integrates them into the
state store, moves the session on with compare-and-set, saves a checkpoint
and only then notifies subscribers. A phase that does not finish leaves
nothing behind but the cost of the calls it made, so resuming from the
last checkpoint simply reruns it.

Supervisor signals are applied at phase boundaries. stop_with_feedback and
quit also cancel the round in flight; its output is discarded and the
phase is rerun (or the session stops) at the boundary.
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from ..config import Config
from ..errors import InvariantViolation, OrchestratorError, PartialPhaseFailure, PhaseFailure, StaleStateError
from ..events import EventBus, EventKind, WorkflowEvent
from ..ledger import CostLedger
from ..providers import TextGenerator
from ..session.checkpoint import LATEST, CheckpointManager
from ..session.models import (
	Candidate,
	CostRecord,
	Evaluation,
	ExecutionMode,
	ExecutionPolicy,
	Finding,
	Phase,
	Plan,
	PlanStatus,
	Role,
	Session,
	SessionSnapshot,
	SessionStatus,
	TeamDescriptor,
)
from ..session.state import SessionStateStore
from .context_filter import FilteredContext, filter_context
from .gate import (
	AutoApproveGate,
	ClarificationQuestions,
	HumanGate,
	PlanDecision,
	PlanReview,
	clarified_requirements,
	valid_overrides,
)
from .interrupts import InterruptChannel, Signal, SignalKind
from .invoker import AgentInvoker, AgentOutput
from .roles import (
	GeneratedCandidate,
	ResearchResult,
	ScoreCard,
	parse_candidate,
	parse_clarification,
	parse_plan,
	parse_research,
	parse_scores,
)
from .task_group import GroupMember, GroupResult, ParallelTaskGroup

logger = logging.getLogger(__name__)

QUALITY_THRESHOLD_MET = "quality_threshold_met"
MAX_ITERATIONS_REACHED = "max_iterations_reached"

EXIT_OK = 0
EXIT_ABORTED = 1
EXIT_CORRUPT_CHECKPOINT = 2


def needs_clarification(request: str, word_threshold: int = 6) -> bool:
	"""Short requests and requests that ask a question get a clarifying round."""
	return len(request.split()) < word_threshold or "?" in request


def best_evaluation(snapshot: SessionSnapshot) -> Optional[Evaluation]:
	"""Highest final score across all iterations; ties go to the earliest candidate."""
	order = {c.id: i for i, c in enumerate(snapshot.candidates)}
	ranked = sorted(
		snapshot.evaluations,
		key=lambda e: (-e.final_score, order.get(e.candidate_id, len(order))),
	)
	return ranked[0] if ranked else None


def build_report(snapshot: SessionSnapshot) -> str:
	"""Markdown summary of a finished session."""
	session = snapshot.session
	lines = [
		"# Brainstorming Report",
		"",
		f"**Request:** {session.request}",
		f"**Iterations:** {session.iteration} of {session.max_iterations}",
		f"**Stopped because:** {session.termination_reason or 'unknown'}",
		"",
	]

	best = best_evaluation(snapshot)
	candidates = {c.id: c for c in snapshot.candidates}
	if best and best.candidate_id in candidates:
		candidate = candidates[best.candidate_id]
		lines.extend([
			f"## Best Candidate: {candidate.variant}",
			"",
			f"Score {best.final_score:.1f} / 10 (iteration {candidate.iteration}, {candidate.role_instance})",
			"",
			candidate.content,
			"",
		])
		if best.rationale:
			lines.extend([f"_Evaluator:_ {best.rationale}", ""])

	final_round = [e for e in snapshot.evaluations if e.iteration == session.iteration]
	if final_round:
		order = {c.id: i for i, c in enumerate(snapshot.candidates)}
		final_round.sort(key=lambda e: (-e.final_score, order.get(e.candidate_id, len(order))))
		lines.extend([
			"## Final Iteration Scores",
			"",
			"| Candidate | Quality | Clarity | Specificity | Final |",
			"|---|---|---|---|---|",
		])
		for e in final_round:
			variant = candidates[e.candidate_id].variant if e.candidate_id in candidates else e.candidate_id
			override = " (override)" if e.human_override is not None else ""
			lines.append(
				f"| {variant} | {e.quality:.1f} | {e.clarity:.1f} | {e.specificity:.1f} "
				f"| {e.final_score:.1f}{override} |"
			)
		lines.append("")

	by_role: dict[str, float] = defaultdict(float)
	for record in snapshot.cost_records:
		by_role[record.role_instance.rpartition("-")[0] or record.role_instance] += record.cost
	lines.extend(["## Cost", ""])
	for role in Role:
		if role.value in by_role:
			lines.append(f"- {role.value}: ${by_role[role.value]:.4f}")
	lines.append(f"- **total: ${session.total_cost:.4f}**")

	return "\n".join(lines) + "\n"


@dataclass
class RunOutcome:
	"""How a start() or resume() call ended."""
	session_id: str
	status: SessionStatus
	phase: Phase
	checkpoint_id: Optional[str]
	exit_code: int
	report: Optional[str] = None
	best_candidate_id: Optional[str] = None
	failed_roles: list[str] = field(default_factory=list)
	termination_reason: Optional[str] = None


class _RoundCancelled(Exception):
	"""A supervisor signal cancelled the round in flight."""

	def __init__(self, reason: Optional[str]):
		super().__init__(reason or "cancelled")
		self.reason = reason


class _QuitRequested(Exception):
	"""The supervisor asked the session to stop."""
	pass


def _with_rejection_note(context: FilteredContext, plan: Plan) -> FilteredContext:
	note = plan.review_notes or "The previous plan was rejected; propose a different approach."
	return replace(context, feedback=(*context.feedback, note))


class WorkflowOrchestrator:
	"""
	Runs brainstorming sessions.

	Usage:
		orchestrator = WorkflowOrchestrator(config, ClaudeCLIGenerator(), CheckpointManager(path))
		outcome = await orchestrator.start("Generate onboarding email variants for a B2B product")
		outcome = await orchestrator.resume("latest")
	"""

	def __init__(
		self,
		config: Config,
		generator: TextGenerator,
		checkpoints: CheckpointManager,
		channel: Optional[InterruptChannel] = None,
		gate: Optional[HumanGate] = None,
		bus: Optional[EventBus] = None,
		clarify: Optional[Callable[[str], bool]] = None,
	):
		self.config = config
		self.checkpoints = checkpoints
		self.channel = channel or InterruptChannel()
		self.gate = gate or AutoApproveGate()
		self.bus = bus or EventBus()
		self._clarify = clarify or (lambda request: needs_clarification(request, config.clarify_word_threshold))

		self.ledger = CostLedger(prices=config.prices)
		self.invoker = AgentInvoker.from_config(generator, self.ledger, config)

		self.state: Optional[SessionStateStore] = None
		self.last_checkpoint_id: Optional[str] = None
		self._emitted_transitions = 0
		self._unreported_costs: list[CostRecord] = []
		self._attempt = 1
		# Research of the current iteration, kept across a cancelled generation round
		self._research_cache: Optional[tuple[int, list[Finding]]] = None

		self._handlers: dict[Phase, Callable[[], Awaitable[None]]] = {
			Phase.INIT: self._phase_init,
			Phase.PLANNING: self._phase_planning,
			Phase.CLARIFYING: self._phase_clarifying,
			Phase.WORKING: self._phase_working,
			Phase.EVALUATING: self._phase_evaluating,
			Phase.DECIDING: self._phase_deciding,
			Phase.REPORTING: self._phase_reporting,
		}

	# -- Entry points --------------------------------------------------

	async def start(self, request: str) -> RunOutcome:
		"""Run a new session for `request` until it completes, aborts or is stopped."""
		if not request or not request.strip():
			raise ValueError("request must not be empty")

		session = Session(
			request=request.strip(),
			mode=self.config.mode,
			max_iterations=self.config.max_iterations,
			quality_threshold=self.config.quality_threshold,
		)
		team = TeamDescriptor(
			researchers=self.config.researcher_count,
			brainstormers=self.config.brainstormer_count,
			policy=self.config.execution_policy,
			first_n=self.config.first_n if self.config.execution_policy == ExecutionPolicy.FIRST_N else None,
		)
		self._load(SessionSnapshot(session=session, team=team))
		self.last_checkpoint_id = None
		logger.info(f"Starting session {session.id} ({session.mode.value})")
		return await self._run()

	async def resume(self, checkpoint_id: str = LATEST, session_id: Optional[str] = None) -> RunOutcome:
		"""
		Continue a session from a checkpoint.

		Raises:
			CheckpointNotFound: Unknown checkpoint id
			CorruptCheckpoint: Checkpoint fails to decode or validate
		"""
		if checkpoint_id == LATEST:
			checkpoint_id = self.checkpoints.latest_id(session_id)
		snapshot = self.checkpoints.load(checkpoint_id, session_id)
		self._load(snapshot)
		self.last_checkpoint_id = checkpoint_id

		session = self.state.session
		logger.info(
			f"Resuming session {session.id} from {checkpoint_id} "
			f"({session.phase.value}/{session.status.value}, iteration {session.iteration})"
		)
		if session.status == SessionStatus.COMPLETED:
			return self._outcome(EXIT_OK)
		if session.status != SessionStatus.RUNNING:
			await self._commit({"status": session.status}, status=SessionStatus.RUNNING)
		return await self._run()

	def snapshot(self) -> SessionSnapshot:
		if self.state is None:
			raise RuntimeError("No session loaded")
		return self.state.snapshot()

	# -- Main loop -----------------------------------------------------

	def _load(self, snapshot: SessionSnapshot) -> None:
		self.state = SessionStateStore(snapshot)
		self.ledger.restore(snapshot.cost_records)
		self._emitted_transitions = len(snapshot.transitions)
		self._unreported_costs = []
		self._research_cache = None

	async def _run(self) -> RunOutcome:
		try:
			while self.state.session.phase != Phase.DONE:
				await self._at_boundary()
				await self._run_phase(self._handlers[self.state.session.phase])
		except _QuitRequested:
			return await self._stop()
		except PhaseFailure as e:
			return await self._abort(str(e), e.failed_roles)
		except OrchestratorError as e:
			return await self._abort(str(e))
		except Exception as e:
			logger.exception(f"Unexpected error in {self.state.session.phase.value}")
			return await self._abort(f"{type(e).__name__}: {e}")

		session = self.state.session
		logger.info(
			f"Session {session.id} completed after {session.iteration} iteration(s): "
			f"{session.termination_reason} (${session.total_cost:.4f})"
		)
		return self._outcome(EXIT_OK)

	async def _run_phase(self, handler: Callable[[], Awaitable[None]]) -> None:
		"""Run one phase, retrying partial failures and rerunning cancelled rounds."""
		phase = self.state.session.phase
		attempt = 1
		while True:
			self._attempt = attempt
			try:
				await handler()
				return
			except PartialPhaseFailure as e:
				if attempt > self.config.phase_retries:
					raise PhaseFailure(phase.value, e.failed_roles, "all members of a required role failed") from e
				logger.warning(f"{e}; retrying phase")
				await self._emit(EventKind.PHASE_RETRY, {"attempt": attempt, "failed_roles": e.failed_roles})
				attempt += 1
			except _RoundCancelled as e:
				logger.info(f"{phase.value} round cancelled ({e.reason}); output discarded")
				await self._at_boundary()

	async def _stop(self) -> RunOutcome:
		"""Checkpoint a paused session and hand control back."""
		session = self.state.session
		if session.status in (SessionStatus.RUNNING, SessionStatus.AWAITING_INPUT):
			await self._commit({"status": session.status}, status=SessionStatus.PAUSED)
		elif self._pending_costs():
			await self._commit()
		logger.info(f"Session {session.id} stopped at {session.phase.value}; checkpoint {self.last_checkpoint_id}")
		return self._outcome(EXIT_OK)

	async def _abort(self, reason: str, failed_roles: Optional[list[str]] = None) -> RunOutcome:
		"""
		Checkpoint the session as aborted and hand control back.

		If the in-memory state no longer passes its consistency checks nothing
		is written, and the outcome points at the last good checkpoint.
		"""
		failed_roles = list(failed_roles or [])
		session = self.state.session
		logger.error(f"Session {session.id} aborted: {reason}")
		try:
			await self._commit({"status": session.status}, status=SessionStatus.ABORTED, termination_reason=reason)
		except (InvariantViolation, StaleStateError) as e:
			logger.error(f"Abort checkpoint skipped ({e}); last good checkpoint is {self.last_checkpoint_id}")
		await self._emit(EventKind.SESSION_ABORTED, {
			"reason": reason,
			"failed_roles": failed_roles,
			"checkpoint_id": self.last_checkpoint_id,
		})
		return self._outcome(EXIT_ABORTED, failed_roles=failed_roles)

	def _outcome(self, exit_code: int, failed_roles: Optional[list[str]] = None) -> RunOutcome:
		snapshot = self.state.snapshot()
		session = snapshot.session
		best = best_evaluation(snapshot)
		return RunOutcome(
			session_id=session.id,
			status=session.status,
			phase=session.phase,
			checkpoint_id=self.last_checkpoint_id,
			exit_code=exit_code,
			report=session.report,
			best_candidate_id=best.candidate_id if best else None,
			failed_roles=list(failed_roles or []),
			termination_reason=session.termination_reason,
		)

	# -- Commit: integrate, transition, checkpoint, notify --------------

	def _pending_costs(self) -> bool:
		known = {r.id for r in self.state.snapshot().cost_records}
		return any(r.id not in known for r in self.ledger.records)

	def _integrate_costs(self) -> None:
		records = self.ledger.take_new()
		if records:
			self.state.add_cost_records(records)
			self._unreported_costs.extend(records)

	async def _commit(self, expected: Optional[dict[str, Any]] = None, **updates: Any) -> str:
		"""
		Integrate pending costs, apply a scalar update, checkpoint, then emit events.

		Returns:
			The id of the checkpoint written
		"""
		self._integrate_costs()
		if updates:
			self.state.compare_and_set(expected or {}, **updates)

		snapshot = self.state.snapshot()
		checkpoint_id = self.checkpoints.save(snapshot)
		self.last_checkpoint_id = checkpoint_id

		for transition in snapshot.transitions[self._emitted_transitions:]:
			logger.info(
				f"Session {snapshot.session.id}: {transition.from_phase.value} -> {transition.to_phase.value} "
				f"[{transition.to_status.value}] iteration {transition.iteration}"
			)
			await self._emit(EventKind.PHASE_TRANSITION, {
				"sequence": transition.sequence,
				"from_phase": transition.from_phase.value,
				"to_phase": transition.to_phase.value,
				"from_status": transition.from_status.value,
				"to_status": transition.to_status.value,
				"checkpoint_id": checkpoint_id,
			})
		self._emitted_transitions = len(snapshot.transitions)

		costs, self._unreported_costs = self._unreported_costs, []
		for record in costs:
			await self._emit(EventKind.COST, record.model_dump())

		await self._emit(EventKind.CHECKPOINT_SAVED, {"checkpoint_id": checkpoint_id})
		return checkpoint_id

	async def _emit(self, kind: EventKind, payload: Optional[dict[str, Any]] = None) -> None:
		session = self.state.session
		await self.bus.emit(WorkflowEvent(
			kind=kind,
			session_id=session.id,
			phase=session.phase.value,
			status=session.status.value,
			iteration=session.iteration,
			payload=payload or {},
		))

	# -- Signals -------------------------------------------------------

	async def _at_boundary(self) -> None:
		"""Apply queued supervisor signals in arrival order."""
		changed = False
		while self.channel.pending:
			for signal in self.channel.drain():
				changed = await self._apply_signal(signal) or changed
		if changed:
			await self._commit()

	async def _apply_signal(self, signal: Signal) -> bool:
		"""Apply one signal. Returns True if session scalars changed without a checkpoint."""
		session = self.state.session

		if signal.kind == SignalKind.QUIT:
			raise _QuitRequested()

		if signal.kind == SignalKind.PAUSE:
			await self._pause(signal)
			return False

		if signal.kind == SignalKind.STOP_WITH_FEEDBACK:
			text = str(signal.value or "").strip()
			if not text:
				return False
			self.state.compare_and_set({"feedback": session.feedback}, feedback=[*session.feedback, text])
			logger.info(f"Feedback recorded: {text[:80]}")
		elif signal.kind == SignalKind.CHANGE_MODE:
			try:
				mode = ExecutionMode(signal.value)
			except ValueError:
				logger.warning(f"Ignoring change_mode signal with unknown mode {signal.value!r}")
				return False
			if mode == session.mode:
				return False
			self.state.compare_and_set({"mode": session.mode}, mode=mode)
			logger.info(f"Mode changed to {mode.value}")
		elif signal.kind == SignalKind.ADJUST_MAX_ITERATIONS:
			try:
				requested = int(signal.value)
			except (TypeError, ValueError):
				requested = 0
			if requested < 1:
				logger.warning(f"Ignoring adjust_max_iterations signal with value {signal.value!r}")
				return False
			# Never below the iteration already reached
			new_max = max(requested, session.iteration)
			if new_max == session.max_iterations:
				return False
			self.state.compare_and_set({"max_iterations": session.max_iterations}, max_iterations=new_max)
			logger.info(f"max_iterations set to {new_max}")
		else:
			# skip outside a gate and resume outside a pause have nothing to act on
			logger.info(f"Ignoring {signal.kind.value} signal at {session.phase.value} boundary")
			return False

		await self._emit(EventKind.SIGNAL_APPLIED, {"signal": signal.kind.value, "value": _jsonable(signal.value)})
		return True

	async def _pause(self, signal: Signal) -> None:
		await self._commit({"status": SessionStatus.RUNNING}, status=SessionStatus.PAUSED)
		await self._emit(EventKind.SIGNAL_APPLIED, {"signal": signal.kind.value})
		logger.info(f"Session {self.state.session_id} paused; waiting for resume")

		ended_by = await self.channel.wait_for_resume()
		if ended_by.kind == SignalKind.QUIT:
			raise _QuitRequested()
		await self._commit({"status": SessionStatus.PAUSED}, status=SessionStatus.RUNNING)
		await self._emit(EventKind.SIGNAL_APPLIED, {"signal": ended_by.kind.value})

	async def _await_gate(self, ask: Callable[[], Awaitable[Any]], automatic: Any) -> Any:
		"""
		Wait for a supervisor decision in interactive mode.

		The session is awaiting_input meanwhile. skip resolves the gate with
		`automatic`; quit stops the session; stop_with_feedback reruns the phase.
		"""
		if self.state.session.mode == ExecutionMode.AUTONOMOUS:
			return automatic

		await self._commit({"status": SessionStatus.RUNNING}, status=SessionStatus.AWAITING_INPUT)

		answer_task = asyncio.ensure_future(ask())
		signal_task = asyncio.ensure_future(self.channel.next_signal(
			{SignalKind.SKIP, SignalKind.QUIT, SignalKind.STOP_WITH_FEEDBACK}
		))
		try:
			done, _ = await asyncio.wait({answer_task, signal_task}, return_when=asyncio.FIRST_COMPLETED)
		finally:
			for task in (answer_task, signal_task):
				if not task.done():
					task.cancel()

		if signal_task in done:
			signal = signal_task.result()
			if signal.kind == SignalKind.QUIT:
				raise _QuitRequested()
			await self._commit({"status": SessionStatus.AWAITING_INPUT}, status=SessionStatus.RUNNING)
			if signal.kind == SignalKind.STOP_WITH_FEEDBACK:
				await self._apply_signal(signal)
				raise _RoundCancelled(signal.kind.value)
			logger.info("Gate skipped; using automatic answer")
			answer = automatic
		else:
			try:
				answer = answer_task.result()
			except Exception as e:
				logger.error(f"Gate failed, using automatic answer: {e}")
				answer = automatic
			await self._commit({"status": SessionStatus.AWAITING_INPUT}, status=SessionStatus.RUNNING)

		return answer

	# -- Groups --------------------------------------------------------

	def _member(
		self,
		role: Role,
		index: int,
		context: FilteredContext,
		parse: Callable[[str], Any],
	) -> GroupMember:
		async def run(token) -> AgentOutput:
			return await self.invoker.invoke(role, index, context, token, parse=parse)
		return GroupMember(role=role, index=index, run=run)

	def _team(self) -> TeamDescriptor:
		return self.state.team or TeamDescriptor(
			researchers=self.config.researcher_count,
			brainstormers=self.config.brainstormer_count,
			policy=self.config.execution_policy,
		)

	async def _run_round(
		self,
		members: list[GroupMember],
		required: list[Role],
		policy: ExecutionPolicy = ExecutionPolicy.WAIT_ALL,
	) -> GroupResult:
		"""
		Run one task group under a fresh round token.

		Raises:
			_RoundCancelled: A supervisor signal cancelled the round
			PartialPhaseFailure: Every member of a required role failed
		"""
		first_n = None
		if policy == ExecutionPolicy.FIRST_N:
			first_n = min(self._team().first_n or self.config.first_n, len(members))

		token = self.channel.open_round()
		try:
			group = ParallelTaskGroup(
				policy=policy,
				first_n=first_n,
				cancel_grace=self.config.cancel_grace,
				token=token,
			)
			result = await group.run(members)
		finally:
			self.channel.close_round(token)

		if result.cancelled:
			raise _RoundCancelled(result.cancel_reason)

		for outcome in result.failed():
			await self._emit(EventKind.MEMBER_FAILED, {
				"member": outcome.member_id,
				"error": outcome.error,
				"error_type": outcome.error_type,
				"attempt": self._attempt,
			})

		failed_roles = result.failed_roles(required)
		if failed_roles:
			raise PartialPhaseFailure(
				self.state.session.phase.value,
				[r.value for r in failed_roles],
				attempt=self._attempt,
			)
		if result.degraded:
			logger.warning(
				f"{self.state.session.phase.value} degraded: "
				f"{', '.join(o.member_id for o in result.failed())} failed"
			)
		return result

	# -- Phases --------------------------------------------------------

	async def _phase_init(self) -> None:
		await self._commit({"phase": Phase.INIT}, phase=Phase.PLANNING)

	async def _phase_planning(self) -> None:
		snapshot = self.state.snapshot()
		context = filter_context(snapshot, Role.PLANNER, Phase.PLANNING)
		team = self._team()
		# Rejections survive a rerun of this phase
		rejected = [p for p in snapshot.plans if p.status == PlanStatus.REJECTED]
		if rejected:
			context = _with_rejection_note(context, rejected[-1])

		while True:
			result = await self._run_round(
				[self._member(
					Role.PLANNER, 1, context,
					lambda text: parse_plan(text, team, self.config.max_team_size),
				)],
				required=[Role.PLANNER],
			)
			output: AgentOutput = result.succeeded(Role.PLANNER)[0].result
			proposal = output.result
			plan = Plan(steps=proposal.steps, notes=proposal.notes)

			review: PlanReview = await self._await_gate(
				lambda: self.gate.review_plan(plan),
				PlanReview(decision=PlanDecision.APPROVE, steps=list(plan.steps)),
			)

			if review.decision == PlanDecision.REJECT:
				plan = plan.model_copy(update={"review_notes": review.notes.strip()})
			self.state.add_plan(plan)
			if review.decision == PlanDecision.REJECT:
				self.state.set_plan_status(plan.id, plan.version, PlanStatus.REJECTED)
				rejected.append(plan)
				logger.info(f"Plan {plan.id} rejected ({len(rejected)})")
				if len(rejected) > 1:
					raise PhaseFailure(Phase.PLANNING.value, [], "plan rejected twice")
				context = _with_rejection_note(context, plan)
				continue

			if review.decision == PlanDecision.MODIFY:
				self.state.set_plan_status(plan.id, plan.version, PlanStatus.MODIFIED)
				modified = Plan(
					id=plan.id,
					version=plan.version + 1,
					parent_version=plan.version,
					steps=review.steps or plan.steps,
					notes=review.notes or plan.notes,
				)
				self.state.add_plan(modified)
				self.state.set_plan_status(modified.id, modified.version, PlanStatus.APPROVED)
			else:
				self.state.set_plan_status(plan.id, plan.version, PlanStatus.APPROVED)

			if proposal.team and self.config.dynamic_team:
				self.state.set_team(proposal.team)
				logger.info(
					f"Team set by planner: {proposal.team.researchers} researcher(s), "
					f"{proposal.team.brainstormers} brainstormer(s)"
				)
			break

		if self._clarify(snapshot.session.request):
			await self._commit({"phase": Phase.PLANNING}, phase=Phase.CLARIFYING)
		else:
			await self._commit({"phase": Phase.PLANNING}, phase=Phase.WORKING, iteration=1)

	async def _phase_clarifying(self) -> None:
		snapshot = self.state.snapshot()
		context = filter_context(snapshot, Role.EXPERT, Phase.CLARIFYING)
		result = await self._run_round(
			[self._member(Role.EXPERT, 1, context, parse_clarification)],
			required=[Role.EXPERT],
		)
		request = result.succeeded(Role.EXPERT)[0].result.result
		questions = ClarificationQuestions(questions=request.questions, assumptions=request.assumptions)

		if questions.questions:
			answers = await self._await_gate(
				lambda: self.gate.answer_questions(questions),
				questions.default_answers(),
			)
			requirements = clarified_requirements(questions, answers)
		else:
			requirements = list(request.assumptions)

		await self._commit(
			{"phase": Phase.CLARIFYING},
			phase=Phase.WORKING,
			iteration=1,
			clarified_requirements=requirements,
		)

	async def _research(self, snapshot: SessionSnapshot) -> list[Finding]:
		session = snapshot.session
		team = self._team()
		plan = snapshot.approved_plan()
		steps = plan.steps if plan and plan.steps else [session.request]
		base = filter_context(snapshot, Role.RESEARCHER, Phase.WORKING)

		members = []
		topics = {}
		for index in range(1, team.researchers + 1):
			step = steps[(index - 1) % len(steps)]
			topics[index] = step
			members.append(self._member(
				Role.RESEARCHER, index, base.with_assignment(f"Research this plan step: {step}"),
				lambda text, step=step: parse_research(text, step),
			))

		result = await self._run_round(members, required=[Role.RESEARCHER], policy=team.policy)
		findings = []
		for outcome in result.succeeded(Role.RESEARCHER):
			output: AgentOutput = outcome.result
			research: ResearchResult = output.result
			findings.append(Finding(
				role_instance=output.role_instance,
				topic=research.topic or topics[outcome.index],
				content=research.content,
				summary=research.summary,
				iteration=session.iteration,
				cost_record_ids=output.cost_record_ids,
			))
		return findings

	async def _generate(self, snapshot: SessionSnapshot) -> list[Candidate]:
		session = snapshot.session
		team = self._team()
		base = filter_context(snapshot, Role.BRAINSTORMER, Phase.WORKING, top_k=self.config.top_k)
		targets = base.refinement_targets

		members = []
		parents: dict[int, Optional[str]] = {}
		for index in range(1, team.brainstormers + 1):
			if targets:
				target = targets[(index - 1) % len(targets)]
				parents[index] = target.candidate_id
				assignment = f"Refine the candidate '{target.variant}' (score {target.score:.1f}) using its critique."
			else:
				parents[index] = None
				assignment = f"Produce candidate variant {index}, distinct from the other brainstormers'."
			members.append(self._member(
				Role.BRAINSTORMER, index, base.with_assignment(assignment),
				lambda text, index=index: parse_candidate(text, f"variant-{index}"),
			))

		result = await self._run_round(members, required=[Role.BRAINSTORMER], policy=team.policy)
		candidates = []
		for outcome in result.succeeded(Role.BRAINSTORMER):
			output: AgentOutput = outcome.result
			generated: GeneratedCandidate = output.result
			candidates.append(Candidate(
				role_instance=output.role_instance,
				variant=generated.variant,
				content=generated.content,
				rationale=generated.rationale,
				parent_id=parents[outcome.index],
				iteration=session.iteration,
				cost_record_ids=output.cost_record_ids,
			))
		return candidates

	async def _phase_working(self) -> None:
		snapshot = self.state.snapshot()
		iteration = snapshot.session.iteration

		findings: list[Finding] = []
		if iteration == 1 and not snapshot.findings:
			if self._research_cache is None or self._research_cache[0] != iteration:
				self._research_cache = (iteration, await self._research(snapshot))
			findings = self._research_cache[1]

		# Brainstormers see this iteration's research before it is committed
		provisional = snapshot.model_copy(update={"findings": [*snapshot.findings, *findings]})
		candidates = await self._generate(provisional)

		self.state.add_findings(findings)
		self.state.add_candidates(candidates)
		self._research_cache = None
		await self._commit({"phase": Phase.WORKING, "iteration": iteration}, phase=Phase.EVALUATING)

	async def _phase_evaluating(self) -> None:
		snapshot = self.state.snapshot()
		iteration = snapshot.session.iteration
		candidates = snapshot.candidates_for_iteration(iteration)
		if not candidates:
			raise PhaseFailure(Phase.EVALUATING.value, [], f"no candidates in iteration {iteration}")

		members = [
			self._member(
				Role.EVALUATOR, index,
				filter_context(snapshot, Role.EVALUATOR, Phase.EVALUATING, candidate_ids=[candidate.id]),
				parse_scores,
			)
			for index, candidate in enumerate(candidates, start=1)
		]
		result = await self._run_round(members, required=[Role.EVALUATOR])

		evaluations = []
		for outcome in result.succeeded(Role.EVALUATOR):
			output: AgentOutput = outcome.result
			scores: ScoreCard = output.result
			evaluations.append(Evaluation(
				candidate_id=candidates[outcome.index - 1].id,
				iteration=iteration,
				role_instance=output.role_instance,
				quality=scores.quality,
				clarity=scores.clarity,
				specificity=scores.specificity,
				overall=scores.overall,
				rationale=scores.rationale,
			))

		overrides = await self._await_gate(
			lambda: self.gate.review_evaluations(candidates, evaluations),
			{},
		)
		overrides = valid_overrides(overrides or {}, evaluations)
		if overrides:
			logger.info(f"Applying {len(overrides)} score override(s)")
			evaluations = [
				e.model_copy(update={"human_override": overrides[e.candidate_id]})
				if e.candidate_id in overrides else e
				for e in evaluations
			]

		self.state.add_evaluations(evaluations)
		await self._commit({"phase": Phase.EVALUATING}, phase=Phase.DECIDING)

	async def _phase_deciding(self) -> None:
		session = self.state.session
		best = self.state.best_evaluation(session.iteration)
		score = best.final_score if best else 0.0

		if best is not None and score >= session.quality_threshold:
			reason = QUALITY_THRESHOLD_MET
		elif session.iteration >= session.max_iterations:
			reason = MAX_ITERATIONS_REACHED
		else:
			logger.info(
				f"Iteration {session.iteration} best {score:.1f} < {session.quality_threshold:.1f}; iterating"
			)
			await self._commit(
				{"phase": Phase.DECIDING, "iteration": session.iteration},
				phase=Phase.WORKING,
				iteration=session.iteration + 1,
			)
			return

		logger.info(f"Iteration {session.iteration} best {score:.1f}; finishing ({reason})")
		await self._commit(
			{"phase": Phase.DECIDING},
			phase=Phase.REPORTING,
			termination_reason=reason,
		)

	async def _phase_reporting(self) -> None:
		self._integrate_costs()
		report = build_report(self.state.snapshot())
		await self._commit(
			{"phase": Phase.REPORTING},
			phase=Phase.DONE,
			status=SessionStatus.COMPLETED,
			report=report,
		)


def _jsonable(value: Any) -> Any:
	return value.value if isinstance(value, Enum) else value
