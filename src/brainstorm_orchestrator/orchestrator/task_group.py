"""
Parallel Task Group - fan-out/fan-in execution of agent members.

Runs independent members concurrently with a bounded worker pool. Under
wait_all every member finishes or fails before the group completes, and a
failure never cancels siblings. Under first_n the group completes once n
members succeeded and cancels the rest. Group-wide cancellation (from the
interrupt channel) marks in-flight members as cancelled, not failed.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from ..errors import InvocationCancelled
from ..session.models import ROLE_ORDER, ExecutionPolicy, Role, role_instance_id
from .interrupts import CancellationToken

logger = logging.getLogger(__name__)


class MemberStatus(str, Enum):
	"""Outcome of one member."""
	SUCCESS = "success"
	FAILURE = "failure"
	CANCELLED = "cancelled"


@dataclass
class GroupMember:
	"""One unit of work: a role instance and the coroutine that runs it."""
	role: Role
	index: int
	run: Callable[[CancellationToken], Awaitable[Any]]

	@property
	def member_id(self) -> str:
		return role_instance_id(self.role, self.index)


@dataclass
class MemberOutcome:
	"""Result of running one member."""
	role: Role
	index: int
	status: MemberStatus
	result: Any = None
	error: Optional[str] = None
	error_type: Optional[str] = None

	@property
	def member_id(self) -> str:
		return role_instance_id(self.role, self.index)

	@property
	def ok(self) -> bool:
		return self.status == MemberStatus.SUCCESS


@dataclass
class GroupResult:
	"""Outcomes of a group run, ordered by role then member index."""
	outcomes: list[MemberOutcome] = field(default_factory=list)
	cancelled: bool = False
	cancel_reason: Optional[str] = None

	def by_member(self) -> dict[str, MemberOutcome]:
		return {o.member_id: o for o in self.outcomes}

	def succeeded(self, role: Optional[Role] = None) -> list[MemberOutcome]:
		return [o for o in self.outcomes if o.ok and (role is None or o.role == role)]

	def failed(self, role: Optional[Role] = None) -> list[MemberOutcome]:
		return [
			o for o in self.outcomes
			if o.status == MemberStatus.FAILURE and (role is None or o.role == role)
		]

	def all_failed(self, role: Role) -> bool:
		"""True if the role had members and none of them succeeded."""
		members = [o for o in self.outcomes if o.role == role]
		return bool(members) and not any(o.ok for o in members)

	def failed_roles(self, required: list[Role]) -> list[Role]:
		return [role for role in required if self.all_failed(role)]

	@property
	def degraded(self) -> bool:
		return any(o.status == MemberStatus.FAILURE for o in self.outcomes)


class ParallelTaskGroup:
	"""
	Runs a set of members concurrently.

	Uses asyncio.Semaphore to bound concurrency (defaults to the member
	count). Member exceptions are captured as failure outcomes.
	"""

	def __init__(
		self,
		policy: ExecutionPolicy = ExecutionPolicy.WAIT_ALL,
		first_n: Optional[int] = None,
		max_concurrency: Optional[int] = None,
		member_timeout: Optional[float] = None,
		cancel_grace: float = 5.0,
		token: Optional[CancellationToken] = None,
	):
		"""
		Initialize the group.

		Args:
			policy: wait_all or first_n
			first_n: Successes required under first_n
			max_concurrency: Worker pool size (default: one per member)
			member_timeout: Bound on each member's total run time
			cancel_grace: Seconds members get to stop cooperatively before being cancelled
			token: Group-wide cancellation token (usually the interrupt channel's round)
		"""
		if policy == ExecutionPolicy.FIRST_N and not first_n:
			raise ValueError("first_n policy requires first_n >= 1")
		self.policy = policy
		self.first_n = first_n
		self.max_concurrency = max_concurrency
		self.member_timeout = member_timeout
		self.cancel_grace = cancel_grace
		self.token = token or CancellationToken()
		# Cancelled by the group itself once first_n is satisfied
		self._members_token = self.token.child()

	def cancel(self, reason: str = "cancelled") -> None:
		"""Cancel the whole group; in-flight members end as cancelled."""
		self.token.cancel(reason)

	async def run(self, members: list[GroupMember]) -> GroupResult:
		"""
		Run all members and collect their outcomes.

		Returns:
			GroupResult in (role, index) order
		"""
		if not members:
			return GroupResult()

		semaphore = asyncio.Semaphore(self.max_concurrency or len(members))
		outcomes: dict[str, MemberOutcome] = {}
		successes = 0

		async def run_member(member: GroupMember) -> None:
			nonlocal successes
			async with semaphore:
				if self._members_token.cancelled:
					outcomes[member.member_id] = MemberOutcome(
						member.role, member.index, MemberStatus.CANCELLED, error=self._members_token.reason,
					)
					return
				try:
					if self.member_timeout:
						result = await asyncio.wait_for(member.run(self._members_token), self.member_timeout)
					else:
						result = await member.run(self._members_token)
					outcome = MemberOutcome(member.role, member.index, MemberStatus.SUCCESS, result=result)
				except InvocationCancelled as e:
					outcome = MemberOutcome(member.role, member.index, MemberStatus.CANCELLED, error=e.reason)
				except asyncio.TimeoutError:
					logger.warning(f"Member {member.member_id} timed out after {self.member_timeout}s")
					outcome = MemberOutcome(
						member.role, member.index, MemberStatus.FAILURE,
						error=f"timed out after {self.member_timeout}s", error_type="TimeoutError",
					)
				except Exception as e:
					logger.warning(f"Member {member.member_id} failed: {e}")
					outcome = MemberOutcome(
						member.role, member.index, MemberStatus.FAILURE,
						error=str(e), error_type=type(e).__name__,
					)

				outcomes[member.member_id] = outcome
				if outcome.ok:
					successes += 1
					if (
						self.policy == ExecutionPolicy.FIRST_N
						and successes >= self.first_n
						and not self._members_token.cancelled
					):
						logger.debug(f"first_n satisfied with {successes} successes; cancelling the rest")
						self._members_token.cancel("first_n satisfied")

		# Fan out
		tasks = [asyncio.create_task(run_member(m), name=m.member_id) for m in members]
		waiter = asyncio.ensure_future(self._members_token.wait())
		try:
			pending = set(tasks)
			while pending and not self._members_token.cancelled:
				done, _ = await asyncio.wait(pending | {waiter}, return_when=asyncio.FIRST_COMPLETED)
				pending -= done

			if pending:
				# Members observe the token at their next suspension point
				_, pending = await asyncio.wait(pending, timeout=self.cancel_grace)
				for task in pending:
					task.cancel()
				if pending:
					await asyncio.wait(pending)
		finally:
			waiter.cancel()
			for task in tasks:
				if not task.done():
					task.cancel()

		# Fan in
		ordered = sorted(members, key=lambda m: (ROLE_ORDER[m.role], m.index))
		result = GroupResult(
			outcomes=[
				outcomes.get(m.member_id) or MemberOutcome(
					m.role, m.index, MemberStatus.CANCELLED, error=self._members_token.reason,
				)
				for m in ordered
			],
			cancelled=self.token.cancelled,
			cancel_reason=self.token.reason,
		)

		logger.info(
			f"Group finished: {len(result.succeeded())} succeeded, {len(result.failed())} failed, "
			f"{len(result.outcomes) - len(result.succeeded()) - len(result.failed())} cancelled"
		)
		return result
