"""Rich views for sessions, checkpoints and live workflow events."""

from datetime import datetime
from typing import Optional

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from .events import EventKind, WorkflowEvent
from .history import SessionSummary, TransitionRow
from .session.checkpoint import CheckpointInfo
from .session.models import CostRecord, SessionSnapshot, SessionStatus


def format_timestamp(iso_str: str) -> str:
	"""Format an ISO timestamp as relative time (e.g. '2m ago') or absolute."""
	try:
		dt = datetime.fromisoformat(iso_str)
		total_secs = int((datetime.now() - dt).total_seconds())

		if total_secs < 0:
			return iso_str[:19]
		if total_secs < 60:
			return f"{total_secs}s ago"
		if total_secs < 3600:
			return f"{total_secs // 60}m ago"
		if total_secs < 86400:
			return f"{total_secs // 3600}h ago"
		return f"{total_secs // 86400}d ago"
	except (ValueError, TypeError):
		return str(iso_str)[:19]


def truncate(text: str, max_len: int = 60) -> str:
	text = " ".join(text.split())
	if len(text) <= max_len:
		return text
	return text[:max_len - 3] + "..."


def status_style(status: str) -> str:
	"""Return a Rich style string for a session status."""
	return {
		SessionStatus.COMPLETED.value: "green",
		SessionStatus.RUNNING.value: "cyan",
		SessionStatus.AWAITING_INPUT.value: "yellow",
		SessionStatus.PAUSED.value: "yellow",
		SessionStatus.ABORTED.value: "red",
	}.get(status, "white")


def score_style(score: float, threshold: float) -> str:
	if score >= threshold:
		return "green"
	if score >= threshold - 2:
		return "yellow"
	return "red"


class EventPrinter:
	"""EventBus subscriber that prints progress lines to the terminal."""

	def __init__(self, console: Optional[Console] = None, show_costs: bool = False):
		self.console = console or Console(stderr=True)
		self.show_costs = show_costs

	def __call__(self, event: WorkflowEvent) -> None:
		payload = event.payload
		if event.kind == EventKind.PHASE_TRANSITION:
			if payload["from_phase"] != payload["to_phase"]:
				self.console.print(
					f"[bold cyan]{payload['from_phase']} -> {payload['to_phase']}[/bold cyan] "
					f"[dim](iteration {event.iteration})[/dim]"
				)
			else:
				style = status_style(payload["to_status"])
				self.console.print(f"[{style}]status: {payload['to_status']}[/{style}]")
		elif event.kind == EventKind.MEMBER_FAILED:
			self.console.print(f"[red]  {payload['member']} failed:[/red] {truncate(str(payload.get('error')), 100)}")
		elif event.kind == EventKind.PHASE_RETRY:
			self.console.print(
				f"[yellow]  retrying {event.phase} (all of {', '.join(payload['failed_roles'])} failed)[/yellow]"
			)
		elif event.kind == EventKind.SIGNAL_APPLIED:
			value = payload.get("value")
			suffix = f": {truncate(str(value), 60)}" if value is not None else ""
			self.console.print(f"[magenta]  signal {payload['signal']}{suffix}[/magenta]")
		elif event.kind == EventKind.SESSION_ABORTED:
			self.console.print(
				f"[bold red]Session aborted:[/bold red] {payload['reason']} "
				f"[dim](checkpoint {payload.get('checkpoint_id')})[/dim]"
			)
		elif event.kind == EventKind.COST and self.show_costs:
			self.console.print(
				f"[dim]  {payload['role_instance']} {payload['model']}: "
				f"{payload['input_units']} in / {payload['output_units']} out ${payload['cost']:.4f}[/dim]"
			)


def render_checkpoints(checkpoints: list[CheckpointInfo], console: Optional[Console] = None) -> None:
	"""Render a table of saved checkpoints."""
	console = console or Console()

	if not checkpoints:
		console.print("[dim]No checkpoints saved yet.[/dim]")
		return

	table = Table(title="Checkpoints")
	table.add_column("Checkpoint", style="cyan")
	table.add_column("Phase")
	table.add_column("Status", justify="center")
	table.add_column("Iteration", justify="right")
	table.add_column("Saved")

	for info in checkpoints:
		style = status_style(info.status.value)
		table.add_row(
			info.id,
			info.phase.value,
			f"[{style}]{info.status.value}[/{style}]",
			str(info.iteration),
			format_timestamp(info.created_at),
		)

	console.print(table)


def render_session_summary(snapshot: SessionSnapshot, console: Optional[Console] = None) -> None:
	"""Render a session: header, plan, candidates with scores, and cost."""
	console = console or Console()
	session = snapshot.session
	style = status_style(session.status.value)

	header = (
		f"[bold]Request:[/bold] {session.request}\n"
		f"[bold]Phase:[/bold] {session.phase.value}  |  "
		f"[bold]Status:[/bold] [{style}]{session.status.value}[/{style}]  |  "
		f"[bold]Iteration:[/bold] {session.iteration}/{session.max_iterations}  |  "
		f"[bold]Mode:[/bold] {session.mode.value}  |  "
		f"[bold]Cost:[/bold] ${session.total_cost:.4f}"
	)
	if session.termination_reason:
		header += f"\n[bold]Stopped because:[/bold] {session.termination_reason}"
	console.print(Panel(header, title=session.id, border_style=style))

	plan = snapshot.approved_plan()
	if plan:
		steps = "\n".join(f"{i}. {step}" for i, step in enumerate(plan.steps, start=1))
		console.print(Panel(steps, title=f"Plan v{plan.version}", border_style="blue"))

	if snapshot.candidates:
		scores = {(e.candidate_id, e.iteration): e for e in snapshot.evaluations}
		table = Table(title="Candidates")
		table.add_column("Iter", justify="right")
		table.add_column("Variant", style="cyan")
		table.add_column("By")
		table.add_column("Score", justify="right")
		table.add_column("Content")

		for candidate in snapshot.candidates:
			evaluation = scores.get((candidate.id, candidate.iteration))
			if evaluation:
				s = score_style(evaluation.final_score, session.quality_threshold)
				mark = "*" if evaluation.human_override is not None else ""
				score = f"[{s}]{evaluation.final_score:.1f}{mark}[/{s}]"
			else:
				score = "[dim]-[/dim]"
			table.add_row(
				str(candidate.iteration),
				candidate.variant,
				candidate.role_instance,
				score,
				truncate(candidate.content),
			)
		console.print(table)

	if session.report:
		console.print(Markdown(session.report))


def render_history(
	transitions: list[TransitionRow],
	costs: list[CostRecord],
	console: Optional[Console] = None,
) -> None:
	"""Render one session's transition log and cost breakdown."""
	console = console or Console()

	if not transitions and not costs:
		console.print("[dim]No history recorded for this session.[/dim]")
		return

	table = Table(title="Transitions")
	table.add_column("#", justify="right")
	table.add_column("From")
	table.add_column("To", style="cyan")
	table.add_column("Status", justify="center")
	table.add_column("Iter", justify="right")
	table.add_column("Checkpoint")
	table.add_column("When")
	for row in transitions:
		style = status_style(row.status)
		table.add_row(
			str(row.sequence),
			row.from_phase,
			row.to_phase,
			f"[{style}]{row.status}[/{style}]",
			str(row.iteration),
			row.checkpoint_id or "",
			format_timestamp(row.created_at),
		)
	console.print(table)

	if costs:
		by_instance: dict[str, list[CostRecord]] = {}
		for record in costs:
			by_instance.setdefault(record.role_instance, []).append(record)

		cost_table = Table(title="Cost by Agent")
		cost_table.add_column("Agent", style="cyan")
		cost_table.add_column("Calls", justify="right")
		cost_table.add_column("Input", justify="right")
		cost_table.add_column("Output", justify="right")
		cost_table.add_column("Cost", justify="right")
		for instance, records in sorted(by_instance.items()):
			cost_table.add_row(
				instance,
				str(len(records)),
				str(sum(r.input_units for r in records)),
				str(sum(r.output_units for r in records)),
				f"${sum(r.cost for r in records):.4f}",
			)
		console.print(cost_table)
		console.print(f"[bold]Total:[/bold] ${sum(r.cost for r in costs):.4f}")


def render_session_list(sessions: list[SessionSummary], console: Optional[Console] = None) -> None:
	"""Render recorded sessions, most recent first."""
	console = console or Console()

	if not sessions:
		console.print("[dim]No sessions recorded yet.[/dim]")
		return

	table = Table(title="Sessions")
	table.add_column("Session ID", style="cyan")
	table.add_column("Phase")
	table.add_column("Status", justify="center")
	table.add_column("Transitions", justify="right")
	table.add_column("Cost", justify="right")
	table.add_column("Last Seen")
	for s in sessions:
		style = status_style(s.last_status)
		table.add_row(
			s.session_id,
			s.last_phase,
			f"[{style}]{s.last_status}[/{style}]",
			str(s.transitions),
			f"${s.total_cost:.4f}",
			format_timestamp(s.last_seen),
		)
	console.print(table)
