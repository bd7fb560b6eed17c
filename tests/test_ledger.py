"""Tests for the cost ledger."""

import pytest

from brainstorm_orchestrator.ledger import CostLedger

PRICES = {
	"default": {"input": 3.0, "output": 15.0},
	"opus": {"input": 15.0, "output": 75.0},
}


class TestPricing:
	def test_known_model(self):
		ledger = CostLedger(PRICES)
		assert ledger.compute_cost("opus", 1_000_000, 0) == pytest.approx(15.0)

	def test_unknown_model_uses_default(self):
		ledger = CostLedger(PRICES)
		record = ledger.record("planner-1", "some-new-model", 1000, 1000)
		assert record.cost == pytest.approx((1000 * 3.0 + 1000 * 15.0) / 1_000_000)

	def test_totals(self):
		ledger = CostLedger(PRICES)
		ledger.record("researcher-1", "default", 1000, 0)
		ledger.record("researcher-2", "default", 1000, 0)
		ledger.record("planner-1", "opus", 0, 1000)
		assert ledger.total() == pytest.approx(0.003 + 0.003 + 0.075)
		assert ledger.by_role()["researcher"] == pytest.approx(0.006)
		assert ledger.by_model()["opus"]["output_units"] == 1000


class TestIntegration:
	def test_take_new_returns_each_record_once(self):
		ledger = CostLedger(PRICES)
		ledger.record("planner-1", "default", 10, 10)
		assert len(ledger.take_new()) == 1
		assert ledger.take_new() == []

	def test_take_new_orders_by_role_then_index(self):
		ledger = CostLedger(PRICES)
		ledger.record("brainstormer-2", "default", 10, 10)
		ledger.record("researcher-2", "default", 10, 10)
		ledger.record("brainstormer-1", "default", 10, 10)
		ledger.record("researcher-1", "default", 10, 10)
		assert [r.role_instance for r in ledger.take_new()] == [
			"researcher-1", "researcher-2", "brainstormer-1", "brainstormer-2",
		]

	def test_restored_records_are_not_new(self):
		source = CostLedger(PRICES)
		record = source.record("planner-1", "default", 10, 10)

		ledger = CostLedger(PRICES)
		ledger.restore([record])
		assert ledger.take_new() == []
		assert ledger.total() == pytest.approx(record.cost)

	def test_listener_errors_are_contained(self):
		seen = []

		def broken(record):
			raise RuntimeError("display gone")

		ledger = CostLedger(PRICES, listeners=[broken, seen.append])
		ledger.record("planner-1", "default", 10, 10)
		assert len(seen) == 1
