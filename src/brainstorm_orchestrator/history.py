"""
SQLite history of session transitions and costs.

Checkpoints hold the authoritative session state; this store is an
append-only log across sessions for browsing and cost reporting. It is
attached to the orchestrator as an event subscriber.
"""

import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional

import aiosqlite

from .events import EventKind, WorkflowEvent
from .session.models import CostRecord

logger = logging.getLogger(__name__)


@dataclass
class TransitionRow:
	session_id: str
	sequence: int
	from_phase: str
	to_phase: str
	status: str
	iteration: int
	checkpoint_id: Optional[str]
	created_at: str

	def to_dict(self) -> dict:
		return asdict(self)

	@classmethod
	def from_row(cls, row: aiosqlite.Row) -> "TransitionRow":
		return cls(
			session_id=row["session_id"],
			sequence=row["sequence"],
			from_phase=row["from_phase"],
			to_phase=row["to_phase"],
			status=row["status"],
			iteration=row["iteration"],
			checkpoint_id=row["checkpoint_id"],
			created_at=row["created_at"],
		)


@dataclass
class SessionSummary:
	session_id: str
	last_phase: str
	last_status: str
	transitions: int
	total_cost: float
	last_seen: str


class HistoryStore:
	"""aiosqlite-backed transition and cost log."""

	def __init__(self, db_path: str = ""):
		if not db_path:
			from .config import get_config
			db_path = str(get_config().history_db_path)
		self.db_path = Path(db_path)
		self.db_path.parent.mkdir(parents=True, exist_ok=True)

	async def init(self) -> None:
		"""Initialize database schema."""
		async with aiosqlite.connect(self.db_path) as db:
			await db.executescript("""
				CREATE TABLE IF NOT EXISTS transitions (
					session_id TEXT NOT NULL,
					sequence INTEGER NOT NULL,
					from_phase TEXT NOT NULL,
					to_phase TEXT NOT NULL,
					status TEXT NOT NULL,
					iteration INTEGER NOT NULL,
					checkpoint_id TEXT,
					created_at TEXT NOT NULL,
					PRIMARY KEY (session_id, sequence)
				);

				CREATE TABLE IF NOT EXISTS cost_records (
					id TEXT PRIMARY KEY,
					session_id TEXT NOT NULL,
					role_instance TEXT NOT NULL,
					model TEXT NOT NULL,
					input_units INTEGER NOT NULL,
					output_units INTEGER NOT NULL,
					cost REAL NOT NULL,
					timestamp TEXT NOT NULL
				);

				CREATE INDEX IF NOT EXISTS idx_cost_records_session ON cost_records(session_id);
			""")
			await db.commit()

	async def add_transition(self, row: TransitionRow) -> None:
		"""Insert a transition; a resumed session replaying a known sequence is ignored."""
		async with aiosqlite.connect(self.db_path) as db:
			await db.execute(
				"""
				INSERT OR IGNORE INTO transitions
				(session_id, sequence, from_phase, to_phase, status, iteration, checkpoint_id, created_at)
				VALUES (?, ?, ?, ?, ?, ?, ?, ?)
				""",
				(
					row.session_id,
					row.sequence,
					row.from_phase,
					row.to_phase,
					row.status,
					row.iteration,
					row.checkpoint_id,
					row.created_at,
				),
			)
			await db.commit()

	async def add_cost_record(self, session_id: str, record: CostRecord) -> None:
		async with aiosqlite.connect(self.db_path) as db:
			await db.execute(
				"""
				INSERT OR IGNORE INTO cost_records
				(id, session_id, role_instance, model, input_units, output_units, cost, timestamp)
				VALUES (?, ?, ?, ?, ?, ?, ?, ?)
				""",
				(
					record.id,
					session_id,
					record.role_instance,
					record.model,
					record.input_units,
					record.output_units,
					record.cost,
					record.timestamp,
				),
			)
			await db.commit()

	async def get_transitions(self, session_id: str) -> list[TransitionRow]:
		async with aiosqlite.connect(self.db_path) as db:
			db.row_factory = aiosqlite.Row
			async with db.execute(
				"SELECT * FROM transitions WHERE session_id = ? ORDER BY sequence",
				(session_id,),
			) as cursor:
				rows = await cursor.fetchall()
				return [TransitionRow.from_row(row) for row in rows]

	async def get_cost_records(self, session_id: str) -> list[CostRecord]:
		async with aiosqlite.connect(self.db_path) as db:
			db.row_factory = aiosqlite.Row
			async with db.execute(
				"SELECT * FROM cost_records WHERE session_id = ? ORDER BY timestamp, id",
				(session_id,),
			) as cursor:
				rows = await cursor.fetchall()
				return [
					CostRecord(
						id=row["id"],
						role_instance=row["role_instance"],
						model=row["model"],
						input_units=row["input_units"],
						output_units=row["output_units"],
						cost=row["cost"],
						timestamp=row["timestamp"],
					)
					for row in rows
				]

	async def get_total_cost(self, session_id: str) -> float:
		async with aiosqlite.connect(self.db_path) as db:
			async with db.execute(
				"SELECT COALESCE(SUM(cost), 0) FROM cost_records WHERE session_id = ?",
				(session_id,),
			) as cursor:
				row = await cursor.fetchone()
				return float(row[0]) if row else 0.0

	async def list_sessions(self, limit: int = 50) -> list[SessionSummary]:
		"""Sessions with their latest transition, most recent first."""
		async with aiosqlite.connect(self.db_path) as db:
			db.row_factory = aiosqlite.Row
			async with db.execute(
				"""
				SELECT
					t.session_id,
					t.to_phase AS last_phase,
					t.status AS last_status,
					t.created_at AS last_seen,
					counts.transitions,
					COALESCE(costs.total_cost, 0) AS total_cost
				FROM transitions t
				JOIN (
					SELECT session_id, MAX(sequence) AS max_sequence, COUNT(*) AS transitions
					FROM transitions GROUP BY session_id
				) counts ON counts.session_id = t.session_id AND counts.max_sequence = t.sequence
				LEFT JOIN (
					SELECT session_id, SUM(cost) AS total_cost FROM cost_records GROUP BY session_id
				) costs ON costs.session_id = t.session_id
				ORDER BY t.created_at DESC
				LIMIT ?
				""",
				(limit,),
			) as cursor:
				rows = await cursor.fetchall()
				return [
					SessionSummary(
						session_id=row["session_id"],
						last_phase=row["last_phase"],
						last_status=row["last_status"],
						transitions=row["transitions"],
						total_cost=float(row["total_cost"]),
						last_seen=row["last_seen"],
					)
					for row in rows
				]

	async def handle_event(self, event: WorkflowEvent) -> None:
		"""EventBus subscriber: persist transitions and costs."""
		if event.kind == EventKind.PHASE_TRANSITION:
			payload = event.payload
			await self.add_transition(TransitionRow(
				session_id=event.session_id,
				sequence=payload["sequence"],
				from_phase=payload["from_phase"],
				to_phase=payload["to_phase"],
				status=payload["to_status"],
				iteration=event.iteration,
				checkpoint_id=payload.get("checkpoint_id"),
				created_at=event.timestamp,
			))
		elif event.kind == EventKind.COST:
			await self.add_cost_record(event.session_id, CostRecord.model_validate(event.payload))
