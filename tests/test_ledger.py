"""
Unit tests for the position model and the position ledger.
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from src.yield_trader import (
    ActionType,
    InMemoryStore,
    Position,
    PositionLedger,
    TradingAction,
    TradingConstants,
)


class TestPosition:
    """Tests for Position."""

    def test_open_sets_snapshots(self, make_position):
        position = make_position(asset="WETH", amount=2.0, price=50.0)

        assert position.id.startswith("Aave V3-WETH-")
        assert position.entry_value == 100.0
        assert position.current_value == 100.0
        assert position.high_water_mark == 50.0
        assert position.unrealized_pnl == 0.0

    def test_high_water_mark_is_monotonic(self, make_position):
        position = make_position(price=100.0)
        position.update_price(130.0)
        position.update_price(90.0)

        assert position.high_water_mark == 130.0
        assert position.current_value == 90.0
        assert position.trailing_drop_percent == pytest.approx(30.769, rel=1e-3)

    def test_zero_entry_value_pnl_percent(self, make_position):
        position = make_position(price=0.0)

        assert position.unrealized_pnl_percent == 0.0

    def test_update_amount_accrues_interest(self, make_position):
        position = make_position(amount=100.0, price=1.0)
        position.update_amount(101.5)

        assert position.earned_interest == pytest.approx(1.5)
        assert position.current_value == pytest.approx(101.5)

    def test_dict_round_trip(self, make_position):
        position = make_position(price=100.0)
        position.update_price(120.0)

        restored = Position.from_dict(position.to_dict())

        assert restored.id == position.id
        assert restored.entry_time == position.entry_time
        assert restored.high_water_mark == 120.0
        assert restored.current_price == 120.0


class TestPositionLedger:
    """Tests for PositionLedger."""

    @pytest.fixture
    def ledger(self):
        return PositionLedger(InMemoryStore())

    def test_add_and_close(self, ledger, make_position):
        position = ledger.add_position(make_position(price=100.0))
        position.update_price(110.0)

        trade = ledger.close_position(position.id, "take profit", tx_ref="0xabc")

        assert not ledger.has_open_positions
        assert trade.exit_price == 110.0
        assert trade.realized_pnl == pytest.approx(10.0)
        assert trade.tx_ref == "0xabc"
        assert ledger.closed_trades() == [trade]

    def test_close_unknown_position(self, ledger):
        assert ledger.close_position("missing", "stop loss") is None

    def test_ids_never_reused(self, ledger, make_position):
        first = make_position()
        duplicate = Position.from_dict(first.to_dict())

        ledger.add_position(first)
        ledger.close_position(first.id, "exit")
        reopened = ledger.add_position(duplicate)

        assert reopened.id != first.id
        assert reopened.id.startswith(first.id)

    def test_history_ring_is_bounded(self, make_position):
        constants = TradingConstants.from_dict({"history": {"max_actions": 3}})
        ledger = PositionLedger(constants=constants)

        for i in range(5):
            ledger.record_action(TradingAction(ActionType.HOLD, f"hold {i}"))

        history = ledger.get_history()
        assert [a.reason for a in history] == ["hold 2", "hold 3", "hold 4"]
        assert [a.reason for a in ledger.get_history(2)] == ["hold 3", "hold 4"]
        assert ledger.get_history(0) == []

    def test_portfolio_pnl(self, ledger, make_position):
        a = ledger.add_position(make_position(amount=1.0, price=100.0))
        b = ledger.add_position(make_position(amount=1.0, price=100.0))
        a.update_price(110.0)
        b.update_price(95.0)
        ledger.close_position(b.id, "stop loss")

        pnl = ledger.get_portfolio_pnl()

        assert pnl["open_positions"] == 1
        assert pnl["closed_trades"] == 1
        assert pnl["unrealized_pnl"] == pytest.approx(10.0)
        assert pnl["unrealized_pnl_percent"] == pytest.approx(10.0)
        assert pnl["realized_pnl"] == pytest.approx(-5.0)
        assert pnl["total_pnl"] == pytest.approx(5.0)

    def test_save_and_load(self, make_position):
        store = InMemoryStore()
        ledger = PositionLedger(store)
        kept = ledger.add_position(make_position(asset="USDC", price=1.0))
        closed = ledger.add_position(make_position(asset="WETH", price=3000.0))
        ledger.close_position(closed.id, "trailing stop")
        ledger.record_action(TradingAction(ActionType.EXIT, "trailing stop", position_id=closed.id))

        assert ledger.save()

        restored = PositionLedger(store)
        restored.load()

        assert [p.id for p in restored.open_positions()] == [kept.id]
        assert restored.closed_trades()[0].position.id == closed.id
        assert restored.get_history()[0].action_type == ActionType.EXIT

    def test_load_skips_bad_records(self, make_position):
        store = InMemoryStore()
        good = make_position()
        store.save("positions", [{"id": "broken"}, good.to_dict()])

        ledger = PositionLedger(store)
        ledger.load()

        assert [p.id for p in ledger.open_positions()] == [good.id]
