"""Session module - Aggregate models, single-writer state store, and checkpoints."""

from .checkpoint import CheckpointInfo, CheckpointManager
from .models import (
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
from .state import SessionStateStore

__all__ = [
	"Session",
	"SessionSnapshot",
	"SessionStatus",
	"SessionStateStore",
	"Phase",
	"ExecutionMode",
	"ExecutionPolicy",
	"Role",
	"Plan",
	"PlanStatus",
	"Finding",
	"Candidate",
	"Evaluation",
	"CostRecord",
	"TeamDescriptor",
	"CheckpointInfo",
	"CheckpointManager",
]
