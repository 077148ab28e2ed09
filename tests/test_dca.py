"""
Unit tests for DCA plan scheduling and bookkeeping.
"""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from src.yield_trader import (
    ConfigError,
    DcaPlanManager,
    DcaStatus,
    InMemoryStore,
    TradingConstants,
)

T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def manager():
    return DcaPlanManager()


class TestCreatePlan:
    def test_first_slice_due_immediately(self, manager):
        plan = manager.create_plan("weth", 0.3, 3, interval_seconds=3600, now=T0)

        assert plan.asset == "WETH"
        assert plan.amount_per_slice == pytest.approx(0.1)
        assert plan.next_execution_at == T0
        assert plan.status == DcaStatus.ACTIVE
        assert manager.due_plans(T0) == [plan]

    def test_default_interval(self, manager):
        plan = manager.create_plan("USDC", 0.1, 2, now=T0)

        assert plan.interval_seconds == 86400.0

    def test_ids_are_unique(self, manager):
        first = manager.create_plan("USDC", 0.1, 2, now=T0)
        second = manager.create_plan("USDC", 0.1, 2, now=T0)

        assert first.id != second.id
        assert len(manager.all_plans()) == 2

    @pytest.mark.parametrize(
        "asset,amount,slices,interval",
        [
            ("ETH", 0.1, 2, 60),
            ("PEPE", 0.1, 2, 60),
            ("USDC", 0.0, 2, 60),
            ("USDC", 0.1, 0, 60),
            ("USDC", 0.1, 51, 60),
            ("USDC", 0.1, 2, 0),
        ],
    )
    def test_invalid_plans_rejected(self, manager, asset, amount, slices, interval):
        with pytest.raises(ConfigError):
            manager.create_plan(asset, amount, slices, interval_seconds=interval)

        assert manager.all_plans() == []


class TestSchedule:
    def test_success_advances_schedule(self, manager):
        plan = manager.create_plan("USDC", 0.2, 2, interval_seconds=3600, now=T0)

        manager.record_execution(plan.id, success=True, tx_ref="0xabc", now=T0)

        assert plan.slices_executed == 1
        assert plan.next_execution_at == T0 + timedelta(hours=1)
        assert manager.due_plans(T0 + timedelta(minutes=59)) == []
        assert manager.due_plans(T0 + timedelta(hours=1)) == [plan]
        assert plan.executions[0].slice_number == 1
        assert plan.executions[0].tx_ref == "0xabc"

    def test_completes_after_last_slice(self, manager):
        plan = manager.create_plan("USDC", 0.2, 2, interval_seconds=60, now=T0)

        manager.record_execution(plan.id, success=True, now=T0)
        manager.record_execution(plan.id, success=True, now=T0 + timedelta(minutes=1))

        assert plan.status == DcaStatus.COMPLETED
        assert manager.active_plans() == []
        assert manager.due_plans(T0 + timedelta(days=1)) == []

    def test_failed_slice_is_retried(self, manager):
        plan = manager.create_plan("USDC", 0.2, 2, interval_seconds=3600, now=T0)

        manager.record_execution(plan.id, success=False, error="insufficient ETH", now=T0)

        assert plan.slices_executed == 0
        assert plan.next_execution_at == T0
        assert manager.due_plans(T0) == [plan]
        assert plan.executions[0].error == "insufficient ETH"

    def test_unknown_plan(self, manager):
        assert manager.record_execution("dca-missing", success=True) is None

    def test_history_is_bounded(self):
        constants = TradingConstants.from_dict({"dca": {"max_execution_history": 2}})
        manager = DcaPlanManager(constants=constants)
        plan = manager.create_plan("USDC", 0.1, 1, now=T0)

        for _ in range(3):
            manager.record_execution(plan.id, success=False, error="paused", now=T0)

        assert len(plan.executions) == 2


class TestCancel:
    def test_cancel_active_plan(self, manager):
        plan = manager.create_plan("USDC", 0.2, 2, now=T0)

        assert manager.cancel_plan(plan.id) is True
        assert plan.status == DcaStatus.CANCELLED
        assert manager.due_plans(T0) == []

    def test_cancel_is_only_for_active_plans(self, manager):
        plan = manager.create_plan("USDC", 0.1, 1, now=T0)
        manager.record_execution(plan.id, success=True, now=T0)

        assert manager.cancel_plan(plan.id) is False
        assert manager.cancel_plan("dca-missing") is False


class TestPersistence:
    def test_round_trip(self):
        store = InMemoryStore()
        manager = DcaPlanManager(store)
        plan = manager.create_plan("WETH", 0.2, 2, interval_seconds=600, now=T0)
        manager.record_execution(plan.id, success=True, tx_ref="0xabc", now=T0)
        manager.save()

        restored = DcaPlanManager(store)
        restored.load()

        loaded = restored.get_plan(plan.id)
        assert loaded.slices_executed == 1
        assert loaded.next_execution_at == T0 + timedelta(minutes=10)
        assert loaded.executions[0].tx_ref == "0xabc"

    def test_unreadable_plan_skipped(self):
        store = InMemoryStore()
        store.save("dca-plans", [{"id": "dca-1"}])
        manager = DcaPlanManager(store)

        manager.load()

        assert manager.all_plans() == []
