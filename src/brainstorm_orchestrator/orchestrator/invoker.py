"""
Agent Invoker - one role instance, one provider call, with retries.

Checks the cancellation token before every attempt and races the provider
call against it, so a stop or quit ends the invocation at its next
suspension point. Transient provider errors and timeouts are retried with
exponential backoff; permanent errors surface immediately.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from ..config import Config
from ..errors import InvocationCancelled, ProviderError
from ..ledger import CostLedger
from ..providers import GenerationConfig, TextGenerator
from ..session.models import Role, role_instance_id
from .context_filter import FilteredContext
from .interrupts import CancellationToken
from .roles import ROLE_INSTRUCTIONS

logger = logging.getLogger(__name__)


@dataclass
class AgentOutput:
	"""Raw text returned by one role instance, with the costs it incurred."""
	role_instance: str
	content: str
	result: Any = None
	attempts: int = 1
	cost_record_ids: list[str] = field(default_factory=list)


class AgentInvoker:
	"""
	Invokes agents through a TextGenerator.

	Usage:
		invoker = AgentInvoker(ClaudeCLIGenerator(), ledger, model="sonnet")
		output = await invoker.invoke(Role.RESEARCHER, 1, context, token)
	"""

	def __init__(
		self,
		generator: TextGenerator,
		ledger: CostLedger,
		model: str = "sonnet",
		timeout: float = 120.0,
		max_retries: int = 3,
		backoff_base: float = 1.0,
		backoff_max: float = 30.0,
		sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
	):
		self.generator = generator
		self.ledger = ledger
		self.model = model
		self.timeout = timeout
		self.max_retries = max_retries
		self.backoff_base = backoff_base
		self.backoff_max = backoff_max
		self._sleep = sleep

	@classmethod
	def from_config(cls, generator: TextGenerator, ledger: CostLedger, config: Config) -> "AgentInvoker":
		return cls(
			generator,
			ledger,
			model=config.model,
			timeout=config.agent_timeout,
			max_retries=config.provider_max_retries,
			backoff_base=config.backoff_base,
			backoff_max=config.backoff_max,
		)

	def backoff_delay(self, attempt: int) -> float:
		"""Delay before retry number `attempt` (1-based)."""
		return min(self.backoff_max, self.backoff_base * (2 ** (attempt - 1)))

	async def _race(self, awaitable: Awaitable[Any], token: CancellationToken, timeout: Optional[float]) -> Any:
		"""Await `awaitable` unless the token trips or the timeout expires first."""
		work = asyncio.ensure_future(awaitable)
		waiter = asyncio.ensure_future(token.wait())
		try:
			done, _ = await asyncio.wait({work, waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
		except asyncio.CancelledError:
			work.cancel()
			raise
		finally:
			waiter.cancel()

		if work in done:
			return work.result()

		work.cancel()
		try:
			await work
		except asyncio.CancelledError:
			pass
		except Exception as e:
			logger.debug(f"Abandoned call ended with {type(e).__name__}: {e}")

		if token.cancelled:
			raise InvocationCancelled(token.reason)
		raise asyncio.TimeoutError()

	async def invoke(
		self,
		role: Role,
		index: int,
		context: FilteredContext,
		token: Optional[CancellationToken] = None,
		model: Optional[str] = None,
		parse: Optional[Callable[[str], Any]] = None,
	) -> AgentOutput:
		"""
		Run one role instance against its filtered context.

		Args:
			role: Role being invoked
			index: Member index within the role (1-based)
			context: Context computed by the context filter
			token: Cancellation token of the enclosing round
			model: Model label override for this call
			parse: Turns the response text into a typed result; a transient
				ProviderError from it is retried like a provider failure

		Returns:
			AgentOutput with the response text

		Raises:
			InvocationCancelled: If the token trips before a response arrives
			ProviderError: Permanent failure, or transient failure after all retries
		"""
		token = token or CancellationToken()
		instance = role_instance_id(role, index)
		config = GenerationConfig(
			model=model or self.model,
			timeout=self.timeout,
			system_prompt=ROLE_INSTRUCTIONS[role],
		)
		prompt = context.to_prompt()

		cost_record_ids: list[str] = []
		attempt = 0
		while True:
			attempt += 1
			token.raise_if_cancelled()
			try:
				generation = await self._race(
					self.generator.generate(role, prompt, config), token, self.timeout,
				)
			except asyncio.TimeoutError:
				error = ProviderError(f"timed out after {self.timeout}s", transient=True, role_instance=instance)
			except ProviderError as e:
				e.role_instance = instance
				error = e
			else:
				record = self.ledger.record(
					instance, generation.model, generation.input_units, generation.output_units,
				)
				cost_record_ids.append(record.id)
				try:
					result = parse(generation.content) if parse else generation.content
				except ProviderError as e:
					e.role_instance = instance
					error = e
				else:
					logger.debug(f"{instance} responded on attempt {attempt}")
					return AgentOutput(
						role_instance=instance,
						content=generation.content,
						result=result,
						attempts=attempt,
						cost_record_ids=cost_record_ids,
					)

			if not error.transient or attempt > self.max_retries:
				logger.warning(f"{instance} failed ({error.kind}) after {attempt} attempt(s): {error}")
				raise error

			delay = self.backoff_delay(attempt)
			logger.info(f"{instance} transient failure, retrying in {delay:.1f}s: {error}")
			await self._race(self._sleep(delay), token, None)
