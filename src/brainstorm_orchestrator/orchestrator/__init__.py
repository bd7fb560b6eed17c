"""Orchestrator module - Workflow state machine, agent invocation, and supervision."""

from .context_filter import FilteredContext, filter_context
from .gate import AutoApproveGate, HumanGate, PlanDecision, PlanReview
from .interrupts import CancellationToken, InterruptChannel, Signal, SignalKind
from .invoker import AgentInvoker, AgentOutput
from .task_group import GroupMember, GroupResult, MemberStatus, ParallelTaskGroup
from .workflow import RunOutcome, WorkflowOrchestrator, needs_clarification

__all__ = [
	"WorkflowOrchestrator",
	"RunOutcome",
	"needs_clarification",
	"AgentInvoker",
	"AgentOutput",
	"FilteredContext",
	"filter_context",
	"ParallelTaskGroup",
	"GroupMember",
	"GroupResult",
	"MemberStatus",
	"InterruptChannel",
	"CancellationToken",
	"Signal",
	"SignalKind",
	"HumanGate",
	"AutoApproveGate",
	"PlanDecision",
	"PlanReview",
]
