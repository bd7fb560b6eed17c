"""Tests for checkpoint persistence."""

import json

import pytest

from brainstorm_orchestrator.errors import CheckpointNotFound, CorruptCheckpoint, InvariantViolation
from brainstorm_orchestrator.session.checkpoint import CheckpointManager, split_checkpoint_id
from brainstorm_orchestrator.session.models import CostRecord, Phase, Session
from brainstorm_orchestrator.session.state import SessionStateStore

from .helpers import make_snapshot


@pytest.fixture
def manager(tmp_path):
	return CheckpointManager(tmp_path / "checkpoints")


def _running_snapshot():
	state = SessionStateStore(make_snapshot())
	state.add_cost_records([
		CostRecord(role_instance="evaluator-1", model="sonnet", input_units=120, output_units=40, cost=0.00096),
	])
	return state.snapshot()


class TestRoundTrip:
	def test_load_equals_saved(self, manager):
		snapshot = _running_snapshot()
		checkpoint_id = manager.save(snapshot)
		assert manager.load(checkpoint_id) == snapshot

	def test_override_and_transitions_survive(self, manager):
		state = SessionStateStore.new(Session(request="Generate prompts for a travel app"))
		state.compare_and_set({"phase": Phase.INIT}, phase=Phase.PLANNING)
		snapshot = state.snapshot()
		loaded = manager.load(manager.save(snapshot))
		assert loaded.transitions == snapshot.transitions

	def test_sequence_increments_per_session(self, manager):
		snapshot = _running_snapshot()
		first = manager.save(snapshot)
		second = manager.save(snapshot)
		assert split_checkpoint_id(first)[1] == 1
		assert split_checkpoint_id(second)[1] == 2
		assert manager.latest_id() == second
		assert [i.id for i in manager.list_checkpoints(snapshot.session.id)] == [first, second]

	def test_latest_resolves_across_sessions(self, manager):
		manager.save(_running_snapshot())
		other = make_snapshot(request="Design a caching layer for a read-heavy API")
		other_id = manager.save(other)
		assert manager.load("latest").session.id == other.session.id
		assert manager.latest_id() == other_id


class TestFailures:
	def test_unknown_id(self, manager):
		with pytest.raises(CheckpointNotFound):
			manager.load("session-abc-0001")

	def test_malformed_id(self, manager):
		with pytest.raises(CheckpointNotFound):
			manager.load("not-a-checkpoint")

	def test_session_id_cannot_leave_checkpoint_dir(self, manager, tmp_path):
		outside = tmp_path / "outside"
		outside.mkdir()
		(outside / "0001.json").write_text("{}")

		with pytest.raises(CheckpointNotFound):
			manager.load("../outside-0001")
		with pytest.raises(CheckpointNotFound):
			manager.load("latest", session_id="..")
		with pytest.raises(CheckpointNotFound):
			split_checkpoint_id("a/b-0001")

	def test_no_latest(self, manager):
		with pytest.raises(CheckpointNotFound):
			manager.load("latest")

	def test_truncated_file_is_corrupt(self, manager):
		snapshot = _running_snapshot()
		checkpoint_id = manager.save(snapshot)
		session_id, sequence = split_checkpoint_id(checkpoint_id)
		path = manager.base_dir / session_id / f"{sequence:04d}.json"
		path.write_text(path.read_text()[:50])
		with pytest.raises(CorruptCheckpoint):
			manager.load(checkpoint_id)

	def test_inconsistent_contents_are_corrupt(self, manager):
		snapshot = _running_snapshot()
		checkpoint_id = manager.save(snapshot)
		session_id, sequence = split_checkpoint_id(checkpoint_id)
		path = manager.base_dir / session_id / f"{sequence:04d}.json"
		data = json.loads(path.read_text())
		data["snapshot"]["session"]["total_cost"] = 42.0
		path.write_text(json.dumps(data))
		with pytest.raises(CorruptCheckpoint, match="inconsistent"):
			manager.load(checkpoint_id)

	def test_invalid_snapshot_is_never_written(self, manager):
		snapshot = make_snapshot()
		snapshot.session.iteration = 99
		with pytest.raises(InvariantViolation):
			manager.save(snapshot)
		assert manager.list_checkpoints() == []
