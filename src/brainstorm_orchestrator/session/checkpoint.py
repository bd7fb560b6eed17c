"""
Checkpoint Manager - durable, atomic snapshots of the session aggregate.

Directory structure:
	{base_dir}/
		latest.json                 # most recent checkpoint across sessions
		{session_id}/
			index.json              # ordered checkpoint metadata
			{sequence:04d}.json     # CheckpointEnvelope

Every file is written to a temp file in the same directory, fsynced and
renamed over its target, so load() never observes a partial write.
"""

import json
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

from pydantic import BaseModel, Field, ValidationError

from ..errors import CheckpointNotFound, CorruptCheckpoint, InvariantViolation
from .models import Phase, SessionSnapshot, SessionStatus

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1
LATEST = "latest"


class CheckpointInfo(BaseModel):
	"""Metadata describing one checkpoint."""
	id: str
	session_id: str
	sequence: int = Field(ge=1)
	created_at: str = Field(default_factory=lambda: datetime.now().isoformat())
	phase: Phase
	status: SessionStatus
	iteration: int = Field(ge=0)
	format_version: int = Field(default=FORMAT_VERSION)


class CheckpointEnvelope(BaseModel):
	"""On-disk checkpoint: metadata plus the full snapshot."""
	checkpoint: CheckpointInfo
	snapshot: SessionSnapshot


def make_checkpoint_id(session_id: str, sequence: int) -> str:
	return f"{session_id}-{sequence:04d}"


def is_safe_session_id(session_id: str) -> bool:
	"""A session id must name a single directory directly under the checkpoint root."""
	return bool(session_id) and session_id not in (".", "..") and "/" not in session_id and "\\" not in session_id


def split_checkpoint_id(checkpoint_id: str) -> tuple[str, int]:
	"""Split '<session_id>-<sequence>' into its parts."""
	session_id, sep, sequence = checkpoint_id.rpartition("-")
	if not sep or not is_safe_session_id(session_id) or not sequence.isdigit():
		raise CheckpointNotFound(f"Malformed checkpoint id: {checkpoint_id}")
	return session_id, int(sequence)


def _write_atomic(path: Path, data: str) -> None:
	"""Write text to path via temp file + fsync + rename."""
	path.parent.mkdir(parents=True, exist_ok=True)
	fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
	try:
		with os.fdopen(fd, "w", encoding="utf-8") as f:
			f.write(data)
			f.flush()
			os.fsync(f.fileno())
		os.replace(tmp_name, path)
	except BaseException:
		try:
			os.unlink(tmp_name)
		except FileNotFoundError:
			pass
		raise


class CheckpointManager:
	"""
	Saves and restores session snapshots.

	Usage:
		manager = CheckpointManager(config.checkpoint_dir)
		checkpoint_id = manager.save(state.snapshot())
		snapshot = manager.load("latest")
	"""

	def __init__(self, base_dir: Union[str, Path]):
		self.base_dir = Path(base_dir)
		self.base_dir.mkdir(parents=True, exist_ok=True)

	def _session_dir(self, session_id: str) -> Path:
		if not is_safe_session_id(session_id):
			raise CheckpointNotFound(f"Invalid session id: {session_id!r}")
		return self.base_dir / session_id

	def _checkpoint_path(self, session_id: str, sequence: int) -> Path:
		return self._session_dir(session_id) / f"{sequence:04d}.json"

	def _read_index(self, session_id: str) -> list[CheckpointInfo]:
		index_path = self._session_dir(session_id) / "index.json"
		if not index_path.exists():
			return []
		try:
			with open(index_path, encoding="utf-8") as f:
				entries = json.load(f)
			return [CheckpointInfo.model_validate(e) for e in entries]
		except (json.JSONDecodeError, ValidationError, TypeError) as e:
			raise CorruptCheckpoint(f"Checkpoint index for {session_id} is unreadable: {e}") from e

	def _write_index(self, session_id: str, entries: list[CheckpointInfo]) -> None:
		data = json.dumps([e.model_dump(mode="json") for e in entries], indent=2)
		_write_atomic(self._session_dir(session_id) / "index.json", data)

	def save(self, snapshot: SessionSnapshot) -> str:
		"""
		Persist a snapshot.

		Args:
			snapshot: A consistent session aggregate

		Returns:
			The new checkpoint id

		Raises:
			InvariantViolation: If the snapshot is inconsistent (nothing is written)
		"""
		snapshot.check_invariants()

		session = snapshot.session
		entries = self._read_index(session.id)
		sequence = entries[-1].sequence + 1 if entries else 1
		info = CheckpointInfo(
			id=make_checkpoint_id(session.id, sequence),
			session_id=session.id,
			sequence=sequence,
			phase=session.phase,
			status=session.status,
			iteration=session.iteration,
		)
		envelope = CheckpointEnvelope(checkpoint=info, snapshot=snapshot)

		# Checkpoint body first, so the index never points at a missing file
		_write_atomic(self._checkpoint_path(session.id, sequence), envelope.model_dump_json(indent=2))
		self._write_index(session.id, entries + [info])
		_write_atomic(self.base_dir / "latest.json", json.dumps({"checkpoint_id": info.id}))

		logger.info(
			f"Saved checkpoint {info.id} ({info.phase.value}/{info.status.value}, iteration {info.iteration})"
		)
		return info.id

	def load(self, checkpoint_id: str = LATEST, session_id: Optional[str] = None) -> SessionSnapshot:
		"""
		Load a snapshot by id, or the latest one.

		Args:
			checkpoint_id: A checkpoint id or "latest"
			session_id: Restrict "latest" to one session

		Raises:
			CheckpointNotFound: If the id does not exist
			CorruptCheckpoint: If the file fails decoding or consistency checks
		"""
		return self.load_envelope(checkpoint_id, session_id).snapshot

	def load_envelope(self, checkpoint_id: str = LATEST, session_id: Optional[str] = None) -> CheckpointEnvelope:
		"""Load a checkpoint with its metadata."""
		if checkpoint_id == LATEST:
			checkpoint_id = self.latest_id(session_id)

		sid, sequence = split_checkpoint_id(checkpoint_id)
		path = self._checkpoint_path(sid, sequence)
		if not path.exists():
			raise CheckpointNotFound(f"Checkpoint not found: {checkpoint_id}")

		try:
			envelope = CheckpointEnvelope.model_validate_json(path.read_text(encoding="utf-8"))
		except (ValidationError, ValueError, UnicodeDecodeError) as e:
			raise CorruptCheckpoint(f"Checkpoint {checkpoint_id} cannot be decoded: {e}") from e

		if envelope.checkpoint.format_version != FORMAT_VERSION:
			raise CorruptCheckpoint(
				f"Checkpoint {checkpoint_id} has unsupported format {envelope.checkpoint.format_version}"
			)
		if envelope.checkpoint.id != checkpoint_id or envelope.snapshot.session.id != sid:
			raise CorruptCheckpoint(f"Checkpoint {checkpoint_id} does not match its contents")

		try:
			envelope.snapshot.check_invariants()
		except InvariantViolation as e:
			raise CorruptCheckpoint(f"Checkpoint {checkpoint_id} is inconsistent: {e}") from e

		return envelope

	def latest_id(self, session_id: Optional[str] = None) -> str:
		"""Resolve the most recent checkpoint id, globally or for one session."""
		if session_id:
			entries = self._read_index(session_id)
			if not entries:
				raise CheckpointNotFound(f"No checkpoints for session {session_id}")
			return entries[-1].id

		latest_path = self.base_dir / "latest.json"
		if not latest_path.exists():
			raise CheckpointNotFound("No checkpoints saved yet")
		try:
			with open(latest_path, encoding="utf-8") as f:
				return json.load(f)["checkpoint_id"]
		except (json.JSONDecodeError, KeyError, TypeError) as e:
			raise CorruptCheckpoint(f"Latest checkpoint pointer is unreadable: {e}") from e

	def list_checkpoints(self, session_id: Optional[str] = None) -> list[CheckpointInfo]:
		"""List checkpoint metadata, oldest first within each session."""
		if session_id:
			return self._read_index(session_id)

		infos: list[CheckpointInfo] = []
		for session_dir in sorted(p for p in self.base_dir.iterdir() if p.is_dir()):
			infos.extend(self._read_index(session_dir.name))
		return sorted(infos, key=lambda i: (i.created_at, i.sequence))
