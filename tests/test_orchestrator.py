"""End-to-end workflow scenarios with a scripted text generator."""

import asyncio

import pytest

from brainstorm_orchestrator.errors import ProviderError
from brainstorm_orchestrator.events import EventBus, EventKind, EventRecorder
from brainstorm_orchestrator.orchestrator import workflow
from brainstorm_orchestrator.orchestrator.gate import PlanDecision, PlanReview
from brainstorm_orchestrator.orchestrator.interrupts import InterruptChannel, Signal, SignalKind
from brainstorm_orchestrator.orchestrator.workflow import (
	EXIT_ABORTED,
	EXIT_OK,
	MAX_ITERATIONS_REACHED,
	QUALITY_THRESHOLD_MET,
	WorkflowOrchestrator,
	best_evaluation,
	build_report,
	needs_clarification,
)
from brainstorm_orchestrator.session.checkpoint import CheckpointManager
from brainstorm_orchestrator.session.models import (
	ExecutionMode,
	ExecutionPolicy,
	Phase,
	PlanStatus,
	Role,
	SessionStatus,
)

from .helpers import (
	ScriptedGate,
	ScriptedGenerator,
	candidate_response,
	make_config,
	make_snapshot,
	prompt_iteration,
	prompt_member,
	scores_response,
)

REQUEST = "Generate onboarding email variants for a developer tool"
FEEDBACK = "focus on sustainable materials"


async def wait_until(predicate, timeout: float = 3.0) -> None:
	"""Poll until predicate() is true."""
	loop = asyncio.get_running_loop()
	deadline = loop.time() + timeout
	while not predicate():
		if loop.time() > deadline:
			raise AssertionError("condition not reached in time")
		await asyncio.sleep(0.005)


async def hang(prompt, n):
	await asyncio.sleep(30)
	return "never"


def build(tmp_path, responders=None, gate=None, channel=None, clarify=None, **config_overrides):
	config = make_config(tmp_path, **config_overrides)
	generator = ScriptedGenerator(responders)
	recorder = EventRecorder()
	bus = EventBus()
	bus.subscribe(recorder)
	orchestrator = WorkflowOrchestrator(
		config,
		generator,
		CheckpointManager(config.checkpoint_dir),
		channel=channel or InterruptChannel(),
		gate=gate,
		bus=bus,
		clarify=clarify or (lambda request: False),
	)
	return orchestrator, generator, recorder


def status_is(orchestrator, status):
	return lambda: orchestrator.state is not None and orchestrator.state.session.status == status


class TestHelpers:
	def test_needs_clarification(self):
		assert needs_clarification("Name a cafe")
		assert needs_clarification("What should a developer onboarding email say to new users?")
		assert not needs_clarification(REQUEST)

	def test_best_evaluation_prefers_earliest_on_tie(self):
		snapshot = make_snapshot()
		snapshot.evaluations[0] = snapshot.evaluations[0].model_copy(update={"overall": 8.0})
		assert best_evaluation(snapshot).candidate_id == "candidate-a"

	def test_report_mentions_best_candidate(self):
		snapshot = make_snapshot()
		snapshot.session.termination_reason = MAX_ITERATIONS_REACHED
		report = build_report(snapshot)
		assert "formal" in report
		assert "Dear user," in report
		assert MAX_ITERATIONS_REACHED in report


class TestHappyPath:
	@pytest.mark.asyncio
	async def test_completes_autonomously(self, tmp_path):
		orchestrator, generator, recorder = build(tmp_path, max_iterations=2)

		outcome = await orchestrator.start(REQUEST)

		assert outcome.exit_code == EXIT_OK
		assert outcome.status == SessionStatus.COMPLETED
		assert outcome.phase == Phase.DONE
		assert outcome.termination_reason == MAX_ITERATIONS_REACHED
		assert "# Brainstorming Report" in outcome.report

		snapshot = orchestrator.snapshot()
		assert snapshot.session.iteration == 2
		assert len(snapshot.findings) == 2
		assert len(snapshot.candidates_for_iteration(1)) == 3
		assert len(snapshot.candidates_for_iteration(2)) == 3
		assert len(snapshot.evaluations) == 6
		# Research runs once, in the first iteration
		assert len(generator.prompts(Role.RESEARCHER)) == 2
		# Second-iteration candidates refine first-iteration ones
		assert all(c.parent_id for c in snapshot.candidates_for_iteration(2))

	@pytest.mark.asyncio
	async def test_phase_sequence(self, tmp_path):
		orchestrator, _, recorder = build(tmp_path, max_iterations=1)
		await orchestrator.start(REQUEST)

		phases = [e.payload["to_phase"] for e in recorder.of_kind(EventKind.PHASE_TRANSITION)]
		assert phases == ["planning", "working", "evaluating", "deciding", "reporting", "done"]
		# Every transition is announced after its checkpoint exists
		for event in recorder.of_kind(EventKind.PHASE_TRANSITION):
			assert orchestrator.checkpoints.load(event.payload["checkpoint_id"])

	@pytest.mark.asyncio
	async def test_cost_total_matches_records(self, tmp_path):
		orchestrator, generator, recorder = build(tmp_path, max_iterations=2)
		await orchestrator.start(REQUEST)

		snapshot = orchestrator.snapshot()
		assert len(snapshot.cost_records) == len(generator.calls)
		assert snapshot.session.total_cost == pytest.approx(sum(r.cost for r in snapshot.cost_records))
		assert snapshot.session.total_cost > 0
		assert len(recorder.of_kind(EventKind.COST)) == len(snapshot.cost_records)

	@pytest.mark.asyncio
	async def test_iteration_never_exceeds_max(self, tmp_path):
		orchestrator, generator, recorder = build(tmp_path, max_iterations=2)
		await orchestrator.start(REQUEST)

		assert max(e.iteration for e in recorder.events) <= 2
		assert max(prompt_iteration(p) for _, p in generator.calls) <= 2

	@pytest.mark.asyncio
	async def test_empty_request_is_rejected(self, tmp_path):
		orchestrator, _, _ = build(tmp_path)
		with pytest.raises(ValueError):
			await orchestrator.start("   ")

	@pytest.mark.asyncio
	async def test_first_n_policy(self, tmp_path):
		async def brainstorm(prompt, n):
			if prompt_member(prompt) == 3:
				await asyncio.sleep(30)
			return candidate_response(f"variant {n}", f"body {n}")

		orchestrator, _, _ = build(
			tmp_path,
			{Role.BRAINSTORMER: brainstorm},
			max_iterations=1,
			execution_policy=ExecutionPolicy.FIRST_N,
			first_n=2,
		)
		outcome = await asyncio.wait_for(orchestrator.start(REQUEST), timeout=5)

		assert outcome.status == SessionStatus.COMPLETED
		assert len(orchestrator.snapshot().candidates_for_iteration(1)) == 2


class TestTermination:
	@pytest.mark.asyncio
	async def test_threshold_met_in_third_iteration(self, tmp_path):
		def evaluate(prompt, n):
			return scores_response(9.2 if prompt_iteration(prompt) == 3 else 5.0)

		orchestrator, generator, _ = build(
			tmp_path, {Role.EVALUATOR: evaluate}, quality_threshold=9.0, max_iterations=10,
		)
		outcome = await orchestrator.start(REQUEST)

		assert outcome.termination_reason == QUALITY_THRESHOLD_MET
		assert orchestrator.snapshot().session.iteration == 3
		assert all(prompt_iteration(p) <= 3 for _, p in generator.calls)
		best = next(e for e in orchestrator.snapshot().evaluations if e.candidate_id == outcome.best_candidate_id)
		assert best.final_score == pytest.approx(9.2)

	@pytest.mark.asyncio
	async def test_resuming_completed_session_does_nothing(self, tmp_path):
		orchestrator, generator, _ = build(tmp_path, max_iterations=1)
		first = await orchestrator.start(REQUEST)
		calls = len(generator.calls)

		outcome = await orchestrator.resume(first.checkpoint_id)

		assert outcome.status == SessionStatus.COMPLETED
		assert outcome.exit_code == EXIT_OK
		assert len(generator.calls) == calls


class TestFailures:
	@pytest.mark.asyncio
	async def test_all_researchers_fail(self, tmp_path):
		orchestrator, generator, recorder = build(
			tmp_path, {Role.RESEARCHER: lambda prompt, n: ProviderError("overloaded")},
		)
		outcome = await orchestrator.start(REQUEST)

		assert outcome.status == SessionStatus.ABORTED
		assert outcome.exit_code == EXIT_ABORTED
		assert outcome.failed_roles == ["researcher"]
		assert len(recorder.of_kind(EventKind.PHASE_RETRY)) == 1
		assert len(recorder.of_kind(EventKind.SESSION_ABORTED)) == 1
		# 2 researchers x (1 try + 1 retry) x (1 run + 1 phase retry)
		assert len(generator.prompts(Role.RESEARCHER)) == 8
		assert generator.prompts(Role.BRAINSTORMER) == []

		saved = orchestrator.checkpoints.load(outcome.checkpoint_id)
		assert saved.session.status == SessionStatus.ABORTED
		assert saved.session.phase == Phase.WORKING
		assert saved.findings == []
		# Only completed calls are priced; the plan was paid for
		assert [r.role_instance for r in saved.cost_records] == ["planner-1"]

	@pytest.mark.asyncio
	async def test_one_brainstormer_failing_degrades(self, tmp_path):
		def brainstorm(prompt, n):
			if prompt_member(prompt) == 2:
				return ProviderError("content policy", transient=False)
			return candidate_response(f"variant {n}", f"body {n}")

		orchestrator, _, recorder = build(tmp_path, {Role.BRAINSTORMER: brainstorm}, max_iterations=1)
		outcome = await orchestrator.start(REQUEST)

		assert outcome.status == SessionStatus.COMPLETED
		candidates = orchestrator.snapshot().candidates_for_iteration(1)
		assert [c.role_instance for c in candidates] == ["brainstormer-1", "brainstormer-3"]
		failed = recorder.of_kind(EventKind.MEMBER_FAILED)
		assert [e.payload["member"] for e in failed] == ["brainstormer-2"]

	@pytest.mark.asyncio
	async def test_unscored_candidate_is_kept(self, tmp_path):
		def evaluate(prompt, n):
			if "body-to-skip" in prompt:
				return ProviderError("bad request", transient=False)
			return scores_response(6.0)

		def brainstorm(prompt, n):
			body = "body-to-skip" if prompt_member(prompt) == 1 else f"body {n}"
			return candidate_response(f"variant {n}", body)

		orchestrator, _, _ = build(
			tmp_path, {Role.EVALUATOR: evaluate, Role.BRAINSTORMER: brainstorm}, max_iterations=1,
		)
		outcome = await orchestrator.start(REQUEST)

		snapshot = orchestrator.snapshot()
		assert outcome.status == SessionStatus.COMPLETED
		assert len(snapshot.candidates_for_iteration(1)) == 3
		assert len(snapshot.evaluations) == 2

	@pytest.mark.asyncio
	async def test_invalid_signal_values_are_ignored(self, tmp_path):
		channel = InterruptChannel()
		channel.send(Signal(SignalKind.CHANGE_MODE, "bogus"))
		channel.send(Signal(SignalKind.ADJUST_MAX_ITERATIONS, "many"))
		channel.send(Signal(SignalKind.ADJUST_MAX_ITERATIONS, 0))
		orchestrator, _, recorder = build(tmp_path, channel=channel, max_iterations=1)

		outcome = await orchestrator.start(REQUEST)

		assert outcome.status == SessionStatus.COMPLETED
		session = orchestrator.snapshot().session
		assert session.mode == ExecutionMode.AUTONOMOUS
		assert session.max_iterations == 1
		assert recorder.of_kind(EventKind.SIGNAL_APPLIED) == []

	@pytest.mark.asyncio
	async def test_unexpected_error_aborts_with_checkpoint(self, tmp_path, monkeypatch):
		def broken_report(snapshot):
			raise RuntimeError("renderer crashed")

		monkeypatch.setattr(workflow, "build_report", broken_report)
		orchestrator, _, recorder = build(tmp_path, max_iterations=1)
		outcome = await orchestrator.start(REQUEST)

		assert outcome.status == SessionStatus.ABORTED
		assert outcome.exit_code == EXIT_ABORTED
		assert outcome.phase == Phase.REPORTING
		assert "renderer crashed" in outcome.termination_reason
		aborted = recorder.of_kind(EventKind.SESSION_ABORTED)
		assert len(aborted) == 1
		assert aborted[0].payload["checkpoint_id"] == outcome.checkpoint_id
		saved = orchestrator.checkpoints.load(outcome.checkpoint_id)
		assert saved.session.status == SessionStatus.ABORTED

		monkeypatch.undo()
		resumed, generator, _ = build(tmp_path, max_iterations=1)
		final = await resumed.resume(outcome.checkpoint_id)

		assert final.status == SessionStatus.COMPLETED
		assert final.report
		assert generator.calls == []


class TestSignals:
	@pytest.mark.asyncio
	async def test_stop_with_feedback_discards_round(self, tmp_path):
		async def brainstorm(prompt, n):
			if n <= 3:
				await asyncio.sleep(30)
			return candidate_response(f"variant {n}", f"body {n}")

		channel = InterruptChannel()
		orchestrator, generator, recorder = build(
			tmp_path, {Role.BRAINSTORMER: brainstorm}, channel=channel, max_iterations=1,
		)
		task = asyncio.create_task(orchestrator.start(REQUEST))
		await wait_until(lambda: len(generator.prompts(Role.BRAINSTORMER)) == 3)

		channel.stop_with_feedback(FEEDBACK)
		outcome = await asyncio.wait_for(task, timeout=5)

		assert outcome.status == SessionStatus.COMPLETED
		snapshot = orchestrator.snapshot()
		assert snapshot.session.feedback == [FEEDBACK]
		assert {c.content for c in snapshot.candidates} == {"body 4", "body 5", "body 6"}

		prompts = generator.prompts(Role.BRAINSTORMER)
		assert all(FEEDBACK not in p for p in prompts[:3])
		assert all(FEEDBACK in p for p in prompts[3:])
		# Research from before the stop is reused
		assert len(generator.prompts(Role.RESEARCHER)) == 2
		# The evaluator never sees feedback
		assert all(FEEDBACK not in p for p in generator.prompts(Role.EVALUATOR))
		assert recorder.of_kind(EventKind.SIGNAL_APPLIED)[0].payload["value"] == FEEDBACK

	@pytest.mark.asyncio
	async def test_quit_then_resume(self, tmp_path):
		channel = InterruptChannel()
		orchestrator, generator, _ = build(tmp_path, {Role.RESEARCHER: hang}, channel=channel, max_iterations=1)
		task = asyncio.create_task(orchestrator.start(REQUEST))
		await wait_until(lambda: len(generator.prompts(Role.RESEARCHER)) == 2)

		channel.quit()
		outcome = await asyncio.wait_for(task, timeout=5)

		assert outcome.status == SessionStatus.PAUSED
		assert outcome.exit_code == EXIT_OK
		assert outcome.phase == Phase.WORKING
		assert orchestrator.snapshot().findings == []

		resumed, generator2, _ = build(tmp_path, max_iterations=1)
		final = await resumed.resume(outcome.checkpoint_id)

		assert final.status == SessionStatus.COMPLETED
		assert final.session_id == outcome.session_id
		assert generator2.prompts(Role.PLANNER) == []
		assert len(generator2.prompts(Role.RESEARCHER)) == 2

	@pytest.mark.asyncio
	async def test_pause_and_resume(self, tmp_path):
		channel = InterruptChannel()
		orchestrator, generator, _ = build(tmp_path, channel=channel, max_iterations=1)
		channel.pause()
		task = asyncio.create_task(orchestrator.start(REQUEST))

		await wait_until(status_is(orchestrator, SessionStatus.PAUSED))
		assert generator.calls == []
		assert orchestrator.checkpoints.load().session.status == SessionStatus.PAUSED

		channel.adjust_max_iterations(2)
		channel.resume()
		outcome = await asyncio.wait_for(task, timeout=5)

		assert outcome.status == SessionStatus.COMPLETED
		# Signals received while paused apply at the next boundary
		assert orchestrator.snapshot().session.max_iterations == 2
		assert orchestrator.snapshot().session.iteration == 2

	@pytest.mark.asyncio
	async def test_quit_while_paused(self, tmp_path):
		channel = InterruptChannel()
		orchestrator, _, _ = build(tmp_path, channel=channel)
		channel.pause()
		task = asyncio.create_task(orchestrator.start(REQUEST))
		await wait_until(status_is(orchestrator, SessionStatus.PAUSED))

		channel.quit()
		outcome = await asyncio.wait_for(task, timeout=5)
		assert outcome.status == SessionStatus.PAUSED
		assert outcome.phase == Phase.INIT

	@pytest.mark.asyncio
	async def test_max_iterations_never_below_current(self, tmp_path):
		channel = InterruptChannel()

		def evaluate(prompt, n):
			if prompt_iteration(prompt) == 2 and n == 4:
				channel.adjust_max_iterations(1)
			return scores_response(5.0)

		orchestrator, _, _ = build(tmp_path, {Role.EVALUATOR: evaluate}, channel=channel, max_iterations=5)
		outcome = await orchestrator.start(REQUEST)

		assert outcome.termination_reason == MAX_ITERATIONS_REACHED
		assert orchestrator.snapshot().session.iteration == 2
		assert orchestrator.snapshot().session.max_iterations == 2


class TestInteractive:
	@pytest.mark.asyncio
	async def test_modified_plan_becomes_new_version(self, tmp_path):
		gate = ScriptedGate(plan_reviews=[
			PlanReview(decision=PlanDecision.MODIFY, steps=["Audit tone", "Draft"], notes="tighter"),
		])
		orchestrator, generator, _ = build(tmp_path, gate=gate, mode=ExecutionMode.INTERACTIVE, max_iterations=1)
		outcome = await orchestrator.start(REQUEST)

		assert outcome.status == SessionStatus.COMPLETED
		plans = orchestrator.snapshot().plans
		assert [(p.version, p.status) for p in plans] == [(1, PlanStatus.MODIFIED), (2, PlanStatus.APPROVED)]
		assert plans[1].parent_version == 1
		assert plans[1].steps == ["Audit tone", "Draft"]
		assert any("Research this plan step: Audit tone" in p for p in generator.prompts(Role.RESEARCHER))
		assert len(gate.evaluations_seen) == 1

	@pytest.mark.asyncio
	async def test_rejected_plan_is_replanned_once(self, tmp_path):
		gate = ScriptedGate(plan_reviews=[
			PlanReview(decision=PlanDecision.REJECT, notes="too generic"),
			PlanReview(decision=PlanDecision.REJECT, notes="still generic"),
		])
		orchestrator, generator, _ = build(tmp_path, gate=gate, mode=ExecutionMode.INTERACTIVE)
		outcome = await orchestrator.start(REQUEST)

		assert outcome.status == SessionStatus.ABORTED
		assert outcome.exit_code == EXIT_ABORTED
		planner_prompts = generator.prompts(Role.PLANNER)
		assert len(planner_prompts) == 2
		assert "too generic" in planner_prompts[1]
		assert all(p.status == PlanStatus.REJECTED for p in orchestrator.snapshot().plans)

	@pytest.mark.asyncio
	async def test_rejection_survives_planning_rerun(self, tmp_path):
		class RejectingGate(ScriptedGate):
			async def review_plan(self, plan):
				self.plans_seen.append(plan)
				if len(self.plans_seen) == 2:
					await asyncio.Event().wait()
				return PlanReview(decision=PlanDecision.REJECT, notes=f"too generic {len(self.plans_seen)}")

		channel = InterruptChannel()
		gate = RejectingGate()
		orchestrator, generator, _ = build(tmp_path, gate=gate, channel=channel, mode=ExecutionMode.INTERACTIVE)
		task = asyncio.create_task(orchestrator.start(REQUEST))
		await wait_until(lambda: len(gate.plans_seen) == 2)

		channel.stop_with_feedback(FEEDBACK)
		outcome = await asyncio.wait_for(task, timeout=5)

		# The rerun still counts the first rejection, so the next one aborts
		assert outcome.status == SessionStatus.ABORTED
		assert "rejected twice" in outcome.termination_reason
		planner_prompts = generator.prompts(Role.PLANNER)
		assert len(planner_prompts) == 3
		assert "too generic 1" in planner_prompts[2]
		assert FEEDBACK in planner_prompts[2]
		plans = orchestrator.snapshot().plans
		assert [p.review_notes for p in plans] == ["too generic 1", "too generic 3"]

	@pytest.mark.asyncio
	async def test_score_override_wins(self, tmp_path):
		gate = ScriptedGate(overrides=lambda candidates: {candidates[1].id: 9.5})
		orchestrator, _, _ = build(
			tmp_path, gate=gate, mode=ExecutionMode.INTERACTIVE, quality_threshold=9.0, max_iterations=3,
		)
		outcome = await orchestrator.start(REQUEST)

		snapshot = orchestrator.snapshot()
		assert outcome.termination_reason == QUALITY_THRESHOLD_MET
		assert snapshot.session.iteration == 1
		assert outcome.best_candidate_id == snapshot.candidates[1].id
		overridden = [e for e in snapshot.evaluations if e.human_override is not None]
		assert len(overridden) == 1
		assert overridden[0].overall == 7.0
		assert overridden[0].final_score == 9.5

	@pytest.mark.asyncio
	async def test_skip_resolves_blocking_gate(self, tmp_path):
		channel = InterruptChannel()
		gate = ScriptedGate(block=True)
		orchestrator, _, _ = build(
			tmp_path, gate=gate, channel=channel, mode=ExecutionMode.INTERACTIVE, max_iterations=1,
		)
		task = asyncio.create_task(orchestrator.start(REQUEST))
		await wait_until(status_is(orchestrator, SessionStatus.AWAITING_INPUT))
		assert orchestrator.checkpoints.load().session.status == SessionStatus.AWAITING_INPUT

		channel.skip()
		channel.change_mode(ExecutionMode.AUTONOMOUS)
		outcome = await asyncio.wait_for(task, timeout=5)

		assert outcome.status == SessionStatus.COMPLETED
		assert len(gate.plans_seen) == 1
		assert orchestrator.snapshot().approved_plan().version == 1
		assert orchestrator.snapshot().session.mode == ExecutionMode.AUTONOMOUS

	@pytest.mark.asyncio
	async def test_quit_at_gate_pauses(self, tmp_path):
		channel = InterruptChannel()
		orchestrator, _, _ = build(
			tmp_path, gate=ScriptedGate(block=True), channel=channel, mode=ExecutionMode.INTERACTIVE,
		)
		task = asyncio.create_task(orchestrator.start(REQUEST))
		await wait_until(status_is(orchestrator, SessionStatus.AWAITING_INPUT))

		channel.quit()
		outcome = await asyncio.wait_for(task, timeout=5)
		assert outcome.status == SessionStatus.PAUSED
		assert outcome.phase == Phase.PLANNING

	@pytest.mark.asyncio
	async def test_clarifying_answers_become_requirements(self, tmp_path):
		gate = ScriptedGate(answers={"Who is the audience?": "Backend engineers"})
		orchestrator, generator, _ = build(
			tmp_path, gate=gate, mode=ExecutionMode.INTERACTIVE, clarify=lambda request: True, max_iterations=1,
		)
		outcome = await orchestrator.start("Name a cafe")

		assert outcome.status == SessionStatus.COMPLETED
		requirements = orchestrator.snapshot().session.clarified_requirements
		assert requirements == ["Who is the audience? -> Backend engineers"]
		assert gate.questions_seen[0].assumptions == ["Developers"]
		assert all("Backend engineers" in p for p in generator.prompts(Role.RESEARCHER))
		assert all("Backend engineers" in p for p in generator.prompts(Role.BRAINSTORMER))

	@pytest.mark.asyncio
	async def test_autonomous_clarification_uses_assumptions(self, tmp_path):
		orchestrator, _, _ = build(tmp_path, clarify=lambda request: True, max_iterations=1)
		await orchestrator.start("Name a cafe")
		assert orchestrator.snapshot().session.clarified_requirements == ["Who is the audience? -> Developers"]
