"""CLI for brainstorm-orchestrator: run, resume, checkpoints, show, and history commands."""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Optional

from rich.console import Console

from .config import Config, load_config
from .console import ConsoleControl
from .display import (
	EventPrinter,
	render_checkpoints,
	render_history,
	render_session_list,
	render_session_summary,
)
from .errors import CheckpointNotFound, CorruptCheckpoint, OrchestratorError
from .events import EventBus
from .history import HistoryStore
from .logging_config import setup_logging
from .orchestrator.gate import AutoApproveGate
from .orchestrator.interrupts import InterruptChannel
from .orchestrator.workflow import EXIT_ABORTED, EXIT_CORRUPT_CHECKPOINT, EXIT_OK, RunOutcome, WorkflowOrchestrator
from .providers import ClaudeCLIGenerator
from .session.checkpoint import LATEST, CheckpointManager
from .session.models import ExecutionMode, ExecutionPolicy, SessionStatus

logger = logging.getLogger(__name__)

console = Console()


def _apply_run_options(config: Config, args: argparse.Namespace) -> Config:
	"""Override config values with the flags given on the command line."""
	options = {
		"mode": args.mode,
		"max_iterations": args.max_iterations,
		"quality_threshold": args.threshold,
		"researcher_count": args.researchers,
		"brainstormer_count": args.brainstormers,
		"execution_policy": args.policy,
		"first_n": args.first_n,
		"model": args.model,
	}
	for key, value in options.items():
		if value is not None:
			setattr(config, key, value)
	config.validate()
	return config


def _print_outcome(outcome: RunOutcome) -> None:
	if outcome.status == SessionStatus.COMPLETED:
		if outcome.report:
			console.print()
			console.print(outcome.report, markup=False)
		console.print(f"[green]Session {outcome.session_id} completed[/green] ({outcome.termination_reason})")
	elif outcome.status == SessionStatus.ABORTED:
		roles = f" ({', '.join(outcome.failed_roles)} failed)" if outcome.failed_roles else ""
		console.print(f"[red]Session {outcome.session_id} aborted{roles}[/red]")
	else:
		console.print(f"[yellow]Session {outcome.session_id} stopped ({outcome.status.value})[/yellow]")
	if outcome.checkpoint_id:
		console.print(f"[dim]Checkpoint: {outcome.checkpoint_id}[/dim]")
		if outcome.status != SessionStatus.COMPLETED:
			console.print(f"[dim]Resume with: brainstorm-orchestrator resume {outcome.checkpoint_id}[/dim]")


async def _run_session(
	config: Config,
	request: Optional[str] = None,
	checkpoint_id: Optional[str] = None,
	session_id: Optional[str] = None,
	show_costs: bool = False,
) -> int:
	"""Run or resume a session with terminal supervision. Returns the exit code."""
	history = HistoryStore(str(config.history_db_path))
	await history.init()

	bus = EventBus()
	bus.subscribe(EventPrinter(show_costs=show_costs))
	bus.subscribe(history.handle_event)

	channel = InterruptChannel()
	control = None
	if sys.stdin.isatty():
		control = ConsoleControl(channel)
		control.start()

	loop = asyncio.get_running_loop()
	try:
		# Ctrl-C checkpoints and stops instead of killing agents mid-write
		loop.add_signal_handler(signal.SIGINT, channel.quit)
	except (NotImplementedError, RuntimeError):
		pass

	orchestrator = WorkflowOrchestrator(
		config,
		ClaudeCLIGenerator(),
		CheckpointManager(config.checkpoint_dir),
		channel=channel,
		gate=control or AutoApproveGate(),
		bus=bus,
	)

	try:
		if request is not None:
			outcome = await orchestrator.start(request)
		else:
			outcome = await orchestrator.resume(checkpoint_id or LATEST, session_id)
	except CheckpointNotFound as e:
		console.print(f"[red]{e}[/red]")
		return EXIT_ABORTED
	except CorruptCheckpoint as e:
		console.print(f"[red]{e}[/red]")
		return EXIT_CORRUPT_CHECKPOINT
	except OrchestratorError as e:
		logger.error(f"Session failed: {e}")
		console.print(f"[red]Session failed: {e}[/red]")
		return EXIT_ABORTED
	finally:
		try:
			loop.remove_signal_handler(signal.SIGINT)
		except (NotImplementedError, RuntimeError):
			pass

	_print_outcome(outcome)
	return outcome.exit_code


def cmd_run(args: argparse.Namespace, config: Config) -> int:
	"""Start a new session."""
	config = _apply_run_options(config, args)
	return asyncio.run(_run_session(config, request=args.request, show_costs=args.costs))


def cmd_resume(args: argparse.Namespace, config: Config) -> int:
	"""Resume a session from a checkpoint."""
	return asyncio.run(_run_session(
		config,
		checkpoint_id=args.checkpoint_id,
		session_id=args.session,
		show_costs=args.costs,
	))


def cmd_checkpoints(args: argparse.Namespace, config: Config) -> int:
	"""List saved checkpoints."""
	manager = CheckpointManager(config.checkpoint_dir)
	render_checkpoints(manager.list_checkpoints(args.session), console)
	return EXIT_OK


def cmd_show(args: argparse.Namespace, config: Config) -> int:
	"""Show the session stored in a checkpoint."""
	manager = CheckpointManager(config.checkpoint_dir)
	try:
		snapshot = manager.load(args.checkpoint_id)
	except CheckpointNotFound as e:
		console.print(f"[red]{e}[/red]")
		return EXIT_ABORTED
	except CorruptCheckpoint as e:
		console.print(f"[red]{e}[/red]")
		return EXIT_CORRUPT_CHECKPOINT
	render_session_summary(snapshot, console)
	return EXIT_OK


async def _show_history(config: Config, session_id: Optional[str]) -> None:
	store = HistoryStore(str(config.history_db_path))
	await store.init()
	if session_id:
		render_history(
			await store.get_transitions(session_id),
			await store.get_cost_records(session_id),
			console,
		)
	else:
		render_session_list(await store.list_sessions(), console)


def cmd_history(args: argparse.Namespace, config: Config) -> int:
	"""Show recorded sessions, or one session's transitions and costs."""
	asyncio.run(_show_history(config, args.session_id))
	return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(
		prog="brainstorm-orchestrator",
		description="Supervised multi-agent brainstorming: plan, research, generate, evaluate, iterate",
	)
	parser.add_argument("-v", "--verbose", action="store_true", help="Log progress to stderr")
	subparsers = parser.add_subparsers(dest="command")

	# run
	run_parser = subparsers.add_parser("run", help="Start a new session")
	run_parser.add_argument("request", help="What to brainstorm")
	run_parser.add_argument("--mode", type=ExecutionMode, choices=list(ExecutionMode), default=None)
	run_parser.add_argument("--max-iterations", type=int, default=None)
	run_parser.add_argument("--threshold", type=float, default=None, help="Quality threshold in [0, 10]")
	run_parser.add_argument("--researchers", type=int, default=None)
	run_parser.add_argument("--brainstormers", type=int, default=None)
	run_parser.add_argument("--policy", type=ExecutionPolicy, choices=list(ExecutionPolicy), default=None)
	run_parser.add_argument("--first-n", type=int, default=None, help="Successes required under first_n")
	run_parser.add_argument("--model", type=str, default=None, help="Model label passed to the CLI")
	run_parser.add_argument("--costs", action="store_true", help="Print every priced call")
	run_parser.set_defaults(func=cmd_run)

	# resume
	resume_parser = subparsers.add_parser("resume", help="Resume from a checkpoint")
	resume_parser.add_argument("checkpoint_id", nargs="?", default=LATEST, help="Checkpoint ID (default: latest)")
	resume_parser.add_argument("--session", type=str, default=None, help="Latest checkpoint of this session")
	resume_parser.add_argument("--costs", action="store_true", help="Print every priced call")
	resume_parser.set_defaults(func=cmd_resume)

	# checkpoints
	checkpoints_parser = subparsers.add_parser("checkpoints", help="List checkpoints")
	checkpoints_parser.add_argument("--session", type=str, default=None, help="Only this session")
	checkpoints_parser.set_defaults(func=cmd_checkpoints)

	# show
	show_parser = subparsers.add_parser("show", help="Show the session in a checkpoint")
	show_parser.add_argument("checkpoint_id", nargs="?", default=LATEST, help="Checkpoint ID (default: latest)")
	show_parser.set_defaults(func=cmd_show)

	# history
	history_parser = subparsers.add_parser("history", help="Session history")
	history_parser.add_argument("session_id", nargs="?", default=None, help="Session ID for detail view")
	history_parser.set_defaults(func=cmd_history)

	return parser


def main(argv: Optional[list[str]] = None) -> int:
	"""CLI entry point."""
	parser = build_parser()
	args = parser.parse_args(argv)

	if not args.command:
		parser.print_help()
		return EXIT_ABORTED

	try:
		config = load_config()
	except ValueError as e:
		console.print(f"[red]Invalid configuration: {e}[/red]")
		return EXIT_ABORTED

	setup_logging(level="INFO" if args.verbose else None, log_dir=config.log_dir, console=True)

	try:
		return args.func(args, config)
	except ValueError as e:
		console.print(f"[red]{e}[/red]")
		return EXIT_ABORTED


if __name__ == "__main__":
	sys.exit(main())
