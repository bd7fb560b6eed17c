"""
Cost Ledger - append-only record of priced provider calls.

Every completed text-generation call produces one CostRecord. The
orchestrator periodically takes the records added since its last
integration and appends them to the session state.
"""

import logging
import math
from collections import defaultdict
from typing import Callable, Iterable, Optional

from .session.models import ROLE_ORDER, CostRecord, parse_role_instance

logger = logging.getLogger(__name__)

UNITS_PER_PRICE = 1_000_000


class CostLedger:
	"""
	Prices and accumulates cost records.

	Unknown model labels are priced with the "default" entry.
	"""

	def __init__(
		self,
		prices: Optional[dict[str, dict[str, float]]] = None,
		listeners: Optional[list[Callable[[CostRecord], None]]] = None,
	):
		self.prices = prices or {"default": {"input": 0.0, "output": 0.0}}
		self._listeners = list(listeners or [])
		self._records: list[CostRecord] = []
		self._taken = 0

	def add_listener(self, listener: Callable[[CostRecord], None]) -> None:
		self._listeners.append(listener)

	def price_for(self, model: str) -> tuple[float, float]:
		"""(input, output) price per million units for a model label."""
		entry = self.prices.get(model) or self.prices.get("default") or {}
		return float(entry.get("input", 0.0)), float(entry.get("output", 0.0))

	def compute_cost(self, model: str, input_units: int, output_units: int) -> float:
		input_price, output_price = self.price_for(model)
		return (input_units * input_price + output_units * output_price) / UNITS_PER_PRICE

	def record(self, role_instance: str, model: str, input_units: int, output_units: int) -> CostRecord:
		"""Price a provider call and append it."""
		record = CostRecord(
			role_instance=role_instance,
			model=model,
			input_units=input_units,
			output_units=output_units,
			cost=self.compute_cost(model, input_units, output_units),
		)
		self._records.append(record)
		logger.debug(
			f"Cost {role_instance} [{model}]: {input_units} in / {output_units} out = ${record.cost:.6f}"
		)
		for listener in self._listeners:
			try:
				listener(record)
			except Exception as e:
				logger.warning(f"Cost listener failed: {e}")
		return record

	def restore(self, records: Iterable[CostRecord]) -> None:
		"""Seed the ledger from a checkpoint; restored records count as already taken."""
		self._records = list(records)
		self._taken = len(self._records)

	def take_new(self) -> list[CostRecord]:
		"""
		Records added since the previous call.

		Ordered by role, then member index, then time, so integration into
		session state is deterministic regardless of completion order.
		"""
		new = self._records[self._taken:]
		self._taken = len(self._records)

		def sort_key(record: CostRecord):
			try:
				role, index = parse_role_instance(record.role_instance)
				return (ROLE_ORDER[role], index, record.timestamp)
			except ValueError:
				return (len(ROLE_ORDER), 0, record.timestamp)

		return sorted(new, key=sort_key)

	@property
	def records(self) -> tuple[CostRecord, ...]:
		return tuple(self._records)

	def total(self) -> float:
		return math.fsum(r.cost for r in self._records)

	def by_role(self) -> dict[str, float]:
		"""Total cost per role (all instances combined)."""
		totals: dict[str, float] = defaultdict(float)
		for record in self._records:
			role = record.role_instance.rpartition("-")[0] or record.role_instance
			totals[role] += record.cost
		return dict(totals)

	def by_model(self) -> dict[str, dict[str, float]]:
		"""Units and cost per model label."""
		summary: dict[str, dict[str, float]] = {}
		for record in self._records:
			entry = summary.setdefault(record.model, {"input_units": 0, "output_units": 0, "cost": 0.0})
			entry["input_units"] += record.input_units
			entry["output_units"] += record.output_units
			entry["cost"] += record.cost
		return summary
