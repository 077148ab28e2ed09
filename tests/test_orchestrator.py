"""
Unit tests for the trading cycle orchestrator and its public facade.

Collaborators are the paper gateway, static market data and a static
opportunity source; no network access.
"""

import asyncio
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from src.yield_trader import (
    ActionType,
    ConfigError,
    InMemoryStore,
    MarketRegime,
    MarketSnapshot,
    OutcomeStatus,
    PaperGateway,
    RecommendedAction,
    StaticMarketData,
    StaticOpportunitySource,
    StrategyConfig,
    TradingOrchestrator,
)
from src.yield_trader.orchestrator import CONSTANTS_KEY, STRATEGY_KEY


def snapshot(action, confidence, regime=MarketRegime.NEUTRAL):
    return MarketSnapshot(regime=regime, recommended_action=action, confidence=confidence)


@pytest.fixture
def opportunities(make_opportunity):
    return StaticOpportunitySource([make_opportunity("USDC", 4.5), make_opportunity("WETH", 3.0)])


@pytest.fixture
def market():
    return StaticMarketData(prices={"ETH": 3000.0})


@pytest.fixture
def orchestrator(gateway, market, opportunities, store, strategy):
    return TradingOrchestrator(
        gateway,
        market_data=market,
        opportunity_source=opportunities,
        store=store,
        strategy=strategy,
    )


def held_weth(make_position, entry_price=2500.0):
    """Gateway with 0.1 WETH supplied and the matching ledger position."""
    gateway = PaperGateway(balances={"WETH": 0.1})
    asyncio.run(gateway.supply("WETH", 0.1))
    return gateway, make_position(asset="WETH", amount=0.1, price=entry_price)


class TestEntry:
    """Entering a position from an empty portfolio."""

    def test_enters_best_opportunity(self, orchestrator, gateway):
        result = asyncio.run(orchestrator.run_cycle())

        assert result.success
        assert result.opportunities_scanned == 2
        [action] = result.actions
        assert action.action_type == ActionType.ENTER
        assert "4.50% APY" in action.reason

        [position] = orchestrator.get_positions()
        assert position.asset == "USDC"
        # 0.1 ETH at $3000 less the 0.3% venue fee
        assert position.entry_amount == pytest.approx(299.1)
        assert position.entry_price == 1.0
        assert action.tx_ref == gateway.transactions[-1]["tx_ref"]
        assert gateway.transactions[-1]["op"] == "supply"

    def test_disabled_does_nothing(self, gateway, market, opportunities):
        orchestrator = TradingOrchestrator(gateway, market, opportunities)

        result = asyncio.run(orchestrator.run_cycle())

        assert result.success
        assert result.actions == []
        assert gateway.transactions == []

    def test_below_min_apy_not_entered(self, gateway, market, make_opportunity, strategy):
        source = StaticOpportunitySource([make_opportunity("USDC", 1.0)])
        orchestrator = TradingOrchestrator(gateway, market, source, strategy=strategy)

        result = asyncio.run(orchestrator.run_cycle())

        assert result.actions == []
        assert not orchestrator.get_positions()

    def test_insufficient_native_holds(self, market, opportunities, strategy):
        gateway = PaperGateway(balances={"ETH": 0.05})
        orchestrator = TradingOrchestrator(gateway, market, opportunities, strategy=strategy)

        [action] = asyncio.run(orchestrator.run_cycle()).actions

        assert action.action_type == ActionType.HOLD
        assert action.reason.startswith("entry skipped: insufficient ETH")
        assert gateway.transactions == []

    def test_failed_entry_is_recorded(self, orchestrator, gateway):
        gateway.fail_operations["supply"] = "reserve paused"

        [action] = asyncio.run(orchestrator.run_cycle()).actions

        assert action.action_type == ActionType.ENTER
        assert "entry failed" in action.reason
        assert not orchestrator.get_positions()


class TestMarketGating:
    """Entries are blocked by exit signals and confident wait signals."""

    @pytest.mark.parametrize(
        "market_snapshot",
        [
            snapshot(RecommendedAction.EXIT, 65.0, MarketRegime.BEARISH),
            snapshot(RecommendedAction.WAIT, 80.0),
        ],
    )
    def test_blocked(self, gateway, opportunities, strategy, market_snapshot):
        market = StaticMarketData({"ETH": 3000.0}, market_snapshot)
        orchestrator = TradingOrchestrator(gateway, market, opportunities, strategy=strategy)

        [action] = asyncio.run(orchestrator.run_cycle()).actions

        assert action.action_type == ActionType.HOLD
        assert action.reason.startswith("market gating:")
        assert gateway.transactions == []

    def test_low_confidence_wait_does_not_block(self, gateway, opportunities, strategy):
        market = StaticMarketData({"ETH": 3000.0}, snapshot(RecommendedAction.WAIT, 60.0))
        orchestrator = TradingOrchestrator(gateway, market, opportunities, strategy=strategy)

        [action] = asyncio.run(orchestrator.run_cycle()).actions

        assert action.action_type == ActionType.ENTER


class TestExit:
    """Evaluating and exiting open positions."""

    def test_take_profit_exit(self, make_position, market, strategy):
        gateway, position = held_weth(make_position)
        orchestrator = TradingOrchestrator(gateway, market, strategy=strategy)
        orchestrator.ledger.add_position(position)

        result = asyncio.run(orchestrator.run_cycle())

        assert result.positions_checked == 1
        assert result.actions[0].action_type == ActionType.EXIT
        assert result.actions[0].reason.startswith("take profit")
        assert not orchestrator.get_positions()

        [trade] = orchestrator.get_closed_trades()
        assert trade.exit_value == pytest.approx(300.0)
        assert trade.realized_pnl == pytest.approx(50.0)
        assert gateway.balances["WETH"] == pytest.approx(0.1)

    def test_hold_within_bands(self, make_position, market, strategy):
        gateway, position = held_weth(make_position, entry_price=2950.0)
        orchestrator = TradingOrchestrator(gateway, market, strategy=strategy)
        orchestrator.ledger.add_position(position)

        [action] = asyncio.run(orchestrator.run_cycle()).actions

        assert action.action_type == ActionType.HOLD
        assert action.position_id == position.id
        assert orchestrator.get_positions()[0].current_price == 3000.0

    def test_disabled_exit_recorded_not_executed(self, make_position, market):
        gateway, position = held_weth(make_position)
        orchestrator = TradingOrchestrator(gateway, market)
        orchestrator.ledger.add_position(position)

        [action] = asyncio.run(orchestrator.run_cycle()).actions

        assert action.action_type == ActionType.EXIT
        assert action.reason.endswith("(not executed: trading disabled)")
        assert orchestrator.get_positions() == [position]
        assert all(tx["op"] != "withdraw" for tx in gateway.transactions)

    def test_failed_exit_keeps_position(self, make_position, market, strategy):
        gateway, position = held_weth(make_position)
        gateway.fail_operations["withdraw"] = "execution reverted"
        orchestrator = TradingOrchestrator(gateway, market, strategy=strategy)
        orchestrator.ledger.add_position(position)

        [action] = asyncio.run(orchestrator.run_cycle()).actions

        assert action.action_type == ActionType.EXIT
        assert "exit failed: execution reverted" in action.reason
        assert orchestrator.get_positions() == [position]
        assert orchestrator.get_closed_trades() == []


class TestCycleRobustness:
    """Failures inside a cycle and persistence after it."""

    def test_source_failure_returns_error(self, gateway, market, store, strategy):
        source = MagicMock()
        source.list_opportunities = AsyncMock(side_effect=RuntimeError("boom"))
        orchestrator = TradingOrchestrator(gateway, market, source, store=store, strategy=strategy)

        result = asyncio.run(orchestrator.run_cycle())

        assert not result.success
        assert result.error == "boom"
        assert store.load("positions") == []

    def test_cycle_persists_ledger(self, orchestrator, store):
        asyncio.run(orchestrator.run_cycle())

        assert len(store.load("positions")) == 1
        assert store.load("trade-history")[0]["type"] == "ENTER"

    def test_ledger_restored_from_store(self, orchestrator, gateway, store):
        asyncio.run(orchestrator.run_cycle())

        restored = TradingOrchestrator(gateway, store=store)

        assert [p.id for p in restored.get_positions()] == [p.id for p in orchestrator.get_positions()]
        assert restored.get_history(1)[0].action_type == ActionType.ENTER

    def test_dry_run_executes_nothing(self, orchestrator, gateway, store):
        result = asyncio.run(orchestrator.run_dry_run_cycle())

        assert result.entry_candidate.asset == "USDC"
        assert len(result.opportunities) == 2
        assert result.to_dict()["trades_executed"] == 0
        assert gateway.transactions == []
        assert store.load("positions") is None
        assert orchestrator.get_history() == []

    def test_dry_run_reports_exit_decision(self, make_position, market, strategy):
        gateway, position = held_weth(make_position)
        orchestrator = TradingOrchestrator(gateway, market, strategy=strategy)
        orchestrator.ledger.add_position(position)

        result = asyncio.run(orchestrator.run_dry_run_cycle())

        [decision] = result.decisions
        assert decision["action"] == "EXIT"
        assert decision["would_execute"] is True
        # The ledger copy is untouched
        assert position.current_price == 2500.0
        assert gateway.transactions[-1]["op"] == "supply"


class TestStrategyFacade:
    """Strategy and constants management."""

    def test_set_mode(self, orchestrator, store):
        strategy = orchestrator.set_mode("conservative")

        assert strategy["take_profit_percent"] == 5.0
        assert strategy["mode"] == "conservative"
        assert store.load(STRATEGY_KEY)["mode"] == "conservative"

    def test_invalid_mode_changes_nothing(self, orchestrator):
        before = orchestrator.get_strategy()

        with pytest.raises(ConfigError):
            orchestrator.set_mode("yolo")

        assert orchestrator.get_strategy() == before

    def test_invalid_update_is_atomic(self, orchestrator):
        before = orchestrator.get_strategy()

        with pytest.raises(ConfigError):
            orchestrator.set_strategy({"take_profit_percent": 15.0, "stop_loss_percent": -1.0})

        assert orchestrator.get_strategy() == before

    def test_enable_disable(self, gateway):
        orchestrator = TradingOrchestrator(gateway)

        assert orchestrator.enable()["enabled"] is True
        assert orchestrator.disable()["enabled"] is False

    def test_persisted_strategy_wins(self, gateway, store):
        store.save(STRATEGY_KEY, {"enabled": True, "min_apy_threshold": 4.0})

        orchestrator = TradingOrchestrator(gateway, store=store, strategy=StrategyConfig())

        assert orchestrator.get_strategy()["enabled"] is True
        assert orchestrator.get_strategy()["min_apy_threshold"] == 4.0

    def test_update_constants_bounds_history(self, orchestrator, store):
        orchestrator.update_constants({"history": {"max_actions": 2}})

        for _ in range(3):
            asyncio.run(orchestrator.run_cycle())

        assert len(orchestrator.get_history()) == 2
        assert store.load(CONSTANTS_KEY)["history"]["max_actions"] == 2
        # Other values in the section keep their defaults
        assert orchestrator.get_constants()["history"]["max_closed_trades"] == 500

    @pytest.mark.parametrize(
        "updates",
        [
            {"bogus": {"x": 1}},
            {"leverage": {"max_loops": 0}},
            {"gas": {"reserve_wei": 1}},
            {"rebalance": {"risk_tolerance": "yolo"}},
        ],
    )
    def test_invalid_constants_rejected(self, orchestrator, updates):
        before = orchestrator.get_constants()

        with pytest.raises(ConfigError):
            orchestrator.update_constants(updates)

        assert orchestrator.get_constants() == before

    def test_persisted_constants_restored(self, gateway, store):
        TradingOrchestrator(gateway, store=store).update_constants({"gas": {"reserve_eth": 0.05}})

        restored = TradingOrchestrator(gateway, store=store)

        assert restored.constants.gas.reserve_eth == 0.05
        assert restored.ledger.constants is restored.constants

    def test_from_config(self, gateway):
        config = {
            "strategy": {"enabled": True, "mode": "aggressive"},
            "constants": {"entry": {"default_size_eth": 0.2}},
        }

        orchestrator = TradingOrchestrator.from_config(config, gateway)

        assert orchestrator.strategy.take_profit_percent == 20.0
        assert orchestrator.constants.entry.default_size_eth == 0.2


class TestExecutionFacade:
    """Swaps, leverage loops and the rebalance optimizer."""

    def test_optimize_positions_rebalances(self, orchestrator, gateway):
        result = asyncio.run(orchestrator.optimize_positions())

        assert result.status == OutcomeStatus.SUCCESS
        assert len(result.report.opened) == 1
        assert gateway.supplied["USDC"] == pytest.approx(0.99 * 3000 * 0.997)
        assert orchestrator.get_history()[-1].action_type == ActionType.REBALANCE

    def test_optimize_positions_cooldown(self, orchestrator):
        asyncio.run(orchestrator.optimize_positions())

        second = asyncio.run(orchestrator.optimize_positions())

        assert second.status == OutcomeStatus.SKIPPED
        assert second.reason == "No rebalancing needed at this time"

    def test_optimize_positions_source_failure(self, gateway, market):
        source = MagicMock()
        source.list_opportunities = AsyncMock(side_effect=RuntimeError("api down"))
        orchestrator = TradingOrchestrator(gateway, market, source)

        result = asyncio.run(orchestrator.optimize_positions())

        assert result.status == OutcomeStatus.ERROR
        assert result.reason == "api down"

    def test_swap_tokens(self, orchestrator):
        outcome = asyncio.run(orchestrator.swap_tokens("ETH", "USDC", 0.1))

        assert outcome.success
        assert outcome.amount_out == pytest.approx(299.1)

    def test_leveraged_round_trip(self):
        gateway = PaperGateway(balances={"WETH": 1.0})
        orchestrator = TradingOrchestrator(gateway)

        opened = asyncio.run(orchestrator.open_leveraged_position("WETH", "USDC", 1.0, loops=1))
        closed = asyncio.run(orchestrator.close_leveraged_position("WETH", "USDC", supply_price=3000.0))

        assert opened.status == OutcomeStatus.SUCCESS
        assert closed.status == OutcomeStatus.SUCCESS
        assert gateway.debt == {}
        # Leverage loops are not tracked as ledger positions
        assert orchestrator.get_positions() == []


class TestRunForever:
    def test_stop_ends_loop(self, orchestrator):
        async def run():
            task = asyncio.create_task(orchestrator.run_forever(interval_seconds=60))
            await asyncio.sleep(0.05)
            orchestrator.stop()
            await asyncio.wait_for(task, timeout=1)

        asyncio.run(run())

        assert len(orchestrator.get_history()) == 1


class TestInterestAccrual:
    """Supplied-balance growth is credited pro rata; other supply is not."""

    @pytest.fixture
    def weth_only(self, make_opportunity):
        return StaticOpportunitySource([make_opportunity("WETH", 3.0)])

    def test_interest_credited_through_cycle(self, make_position, market, strategy):
        gateway, position = held_weth(make_position, entry_price=3000.0)
        orchestrator = TradingOrchestrator(gateway, market, strategy=strategy)
        orchestrator.ledger.add_position(position)
        asyncio.run(orchestrator.run_cycle())

        # 36.5% APY for 10 days: +1%
        gateway.accrue_interest("WETH", apy_percent=36.5, days=10)
        [action] = asyncio.run(orchestrator.run_cycle()).actions

        assert action.action_type == ActionType.HOLD
        assert position.current_amount == pytest.approx(0.101)
        assert position.earned_interest == pytest.approx(0.001)
        assert position.unrealized_pnl_percent == pytest.approx(1.0)

    def test_leverage_loop_does_not_count_as_interest(self, gateway, market, weth_only, strategy):
        orchestrator = TradingOrchestrator(gateway, market, weth_only, strategy=strategy)
        asyncio.run(orchestrator.run_cycle())
        [position] = orchestrator.get_positions()

        gateway.balances["WETH"] = 0.5
        opened = asyncio.run(orchestrator.open_leveraged_position("WETH", "USDC", 0.5, loops=1))
        [action] = asyncio.run(orchestrator.run_cycle()).actions

        assert opened.status == OutcomeStatus.SUCCESS
        assert gateway.supplied["WETH"] > 0.6
        assert action.action_type == ActionType.HOLD
        assert position.current_amount == pytest.approx(0.1)
        assert position.earned_interest == 0.0
        assert orchestrator.get_portfolio_pnl()["unrealized_pnl"] == pytest.approx(0.0)

    def test_outside_supply_is_not_credited(self, make_position, market, strategy):
        gateway, position = held_weth(make_position, entry_price=3000.0)
        orchestrator = TradingOrchestrator(gateway, market, strategy=strategy)
        orchestrator.ledger.add_position(position)
        asyncio.run(orchestrator.run_cycle())

        gateway.balances["WETH"] = 1.0
        asyncio.run(gateway.supply("WETH", 1.0))
        asyncio.run(orchestrator.run_cycle())

        assert position.current_amount == pytest.approx(0.1)

        # Interest on the whole reserve is still shared pro rata
        gateway.accrue_interest("WETH", apy_percent=36.5, days=10)
        asyncio.run(orchestrator.run_cycle())

        assert position.current_amount == pytest.approx(0.101)

    def test_baseline_survives_restart(self, make_position, market, store, strategy):
        gateway, position = held_weth(make_position, entry_price=3000.0)
        orchestrator = TradingOrchestrator(gateway, market, store=store, strategy=strategy)
        orchestrator.ledger.add_position(position)
        asyncio.run(orchestrator.run_cycle())

        gateway.accrue_interest("WETH", apy_percent=36.5, days=10)
        restored = TradingOrchestrator(gateway, market, store=store, strategy=strategy)
        asyncio.run(restored.run_cycle())

        assert restored.get_positions()[0].current_amount == pytest.approx(0.101)


class TestSharedReserveExits:
    """An exit withdraws only the exiting position's own amount."""

    def test_exit_leaves_other_position_supplied(self, make_position, market, strategy):
        gateway = PaperGateway(balances={"WETH": 0.2})
        asyncio.run(gateway.supply("WETH", 0.2))
        winner = make_position(asset="WETH", amount=0.1, price=2500.0)
        holder = make_position(asset="WETH", amount=0.1, price=2950.0)
        orchestrator = TradingOrchestrator(gateway, market, strategy=strategy)
        orchestrator.ledger.add_position(winner)
        orchestrator.ledger.add_position(holder)

        actions = asyncio.run(orchestrator.run_cycle()).actions

        assert [a.action_type for a in actions] == [ActionType.EXIT, ActionType.HOLD]
        [trade] = orchestrator.get_closed_trades()
        assert trade.position.id == winner.id
        assert trade.exit_value == pytest.approx(300.0)
        assert orchestrator.get_positions() == [holder]
        assert gateway.supplied["WETH"] == pytest.approx(0.1)

    def test_exit_beside_leverage_collateral(self, make_position, market, strategy):
        gateway, position = held_weth(make_position)
        orchestrator = TradingOrchestrator(gateway, market, strategy=strategy)
        orchestrator.ledger.add_position(position)
        gateway.balances["WETH"] = 1.0
        asyncio.run(orchestrator.open_leveraged_position("WETH", "USDC", 1.0, loops=1))

        [action] = asyncio.run(orchestrator.run_cycle()).actions

        assert action.action_type == ActionType.EXIT
        assert action.reason.startswith("take profit: 20.00%")
        [trade] = orchestrator.get_closed_trades()
        assert trade.exit_value == pytest.approx(300.0)
        assert trade.realized_pnl == pytest.approx(50.0)
        # The leveraged collateral and its debt are untouched
        assert gateway.supplied["WETH"] > 1.0
        assert "USDC" in gateway.debt


class TestDegradedCollaborators:
    """Price and snapshot failures degrade the cycle instead of failing it."""

    def test_price_failure_keeps_stale_prices(self, make_position, strategy):
        gateway, position = held_weth(make_position, entry_price=2950.0)
        market = MagicMock()
        market.get_prices = AsyncMock(side_effect=[{"ETH": 3000.0}, RuntimeError("rate limited")])
        market.get_market_snapshot = AsyncMock(return_value=None)
        orchestrator = TradingOrchestrator(gateway, market, strategy=strategy)
        orchestrator.ledger.add_position(position)
        asyncio.run(orchestrator.run_cycle())

        result = asyncio.run(orchestrator.run_cycle())

        assert result.success
        assert [a.action_type for a in result.actions] == [ActionType.HOLD]
        assert position.current_price == 3000.0
        assert market.get_prices.await_count == 2

    def test_snapshot_failure_disables_gating(self, gateway, opportunities, strategy):
        market = MagicMock()
        market.get_prices = AsyncMock(return_value={"ETH": 3000.0})
        market.get_market_snapshot = AsyncMock(side_effect=RuntimeError("feed down"))
        orchestrator = TradingOrchestrator(gateway, market, opportunities, strategy=strategy)

        result = asyncio.run(orchestrator.run_cycle())

        assert result.success
        [action] = result.actions
        assert action.action_type == ActionType.ENTER
        assert orchestrator.get_positions()[0].asset == "USDC"


class TestEmergencyWithdraw:
    def test_withdraws_everything_and_disables(self, make_position, market, strategy, store):
        gateway, position = held_weth(make_position, entry_price=2950.0)
        orchestrator = TradingOrchestrator(gateway, market, store=store, strategy=strategy)
        orchestrator.ledger.add_position(position)

        actions = asyncio.run(orchestrator.emergency_withdraw())

        assert [(a.action_type, a.reason) for a in actions] == [(ActionType.EXIT, "emergency withdraw")]
        assert orchestrator.get_positions() == []
        assert orchestrator.get_closed_trades()[0].exit_value == pytest.approx(300.0)
        assert orchestrator.get_strategy()["enabled"] is False
        assert store.load(STRATEGY_KEY)["enabled"] is False
        assert store.load("positions") == []

    def test_failed_withdrawal_keeps_position(self, make_position, market, strategy):
        gateway, position = held_weth(make_position, entry_price=2950.0)
        gateway.fail_operations["withdraw"] = "paused"
        orchestrator = TradingOrchestrator(gateway, market, strategy=strategy)
        orchestrator.ledger.add_position(position)

        [action] = asyncio.run(orchestrator.emergency_withdraw())

        assert action.reason == "emergency withdraw (exit failed: paused)"
        assert orchestrator.get_positions() == [position]

    def test_stops_running_loop(self, orchestrator):
        async def run():
            task = asyncio.create_task(orchestrator.run_forever(interval_seconds=60))
            await asyncio.sleep(0.05)
            actions = await orchestrator.emergency_withdraw()
            await asyncio.wait_for(task, timeout=1)
            return actions

        actions = asyncio.run(run())

        assert [a.reason for a in actions] == ["emergency withdraw"]
        assert orchestrator.get_positions() == []


class TestCompoundYield:
    def test_reinvests_interest_into_best_opportunity(self, orchestrator, gateway):
        asyncio.run(orchestrator.run_cycle())
        gateway.accrue_interest("USDC", apy_percent=36.5, days=10)

        result = asyncio.run(orchestrator.compound_yield())

        assert result.status == OutcomeStatus.SUCCESS
        [trade] = orchestrator.get_closed_trades()
        assert trade.reason == "rebalance"
        assert trade.realized_pnl == pytest.approx(2.991)
        [position] = orchestrator.get_positions()
        assert position.asset == "USDC"
        assert position.entry_amount == pytest.approx(299.1 * 1.01)
        last = orchestrator.get_history()[-1]
        assert last.action_type == ActionType.REBALANCE
        assert last.reason.startswith("Compound into Aave V3 USDC @ 4.50% APY")

    def test_nothing_tracked_is_skipped(self, gateway, market, opportunities):
        orchestrator = TradingOrchestrator(gateway, market, opportunities)

        result = asyncio.run(orchestrator.compound_yield())

        assert result.status == OutcomeStatus.SKIPPED
        assert result.reason.startswith("Insufficient yield to compound")
        assert gateway.transactions == []


class TestDcaPlans:
    """DCA plans through the orchestrator."""

    def test_due_slice_executes_in_cycle(self, orchestrator, gateway):
        plan = orchestrator.create_dca_plan("weth", 0.2, 2, interval_seconds=3600)

        first = asyncio.run(orchestrator.run_cycle()).actions

        assert [a.action_type for a in first] == [ActionType.ENTER, ActionType.ENTER]
        assert first[1].reason == "DCA slice 1/2 into WETH"
        weth = orchestrator.ledger.get_position(first[1].position_id)
        assert weth.entry_amount == pytest.approx(0.1)
        assert weth.entry_price == 3000.0
        assert weth.apy == 3.0
        assert plan.slices_executed == 1
        assert gateway.balances["ETH"] == pytest.approx(0.8)

        # Next slice is an hour away
        second = asyncio.run(orchestrator.run_cycle()).actions
        assert [a.action_type for a in second] == [ActionType.HOLD, ActionType.HOLD]

    def test_gated_cycle_skips_slices(self, gateway, opportunities, strategy):
        market = StaticMarketData(
            {"ETH": 3000.0}, snapshot(RecommendedAction.EXIT, 65.0, MarketRegime.BEARISH)
        )
        orchestrator = TradingOrchestrator(gateway, market, opportunities, strategy=strategy)
        plan = orchestrator.create_dca_plan("USDC", 0.2, 2)

        asyncio.run(orchestrator.run_cycle())

        assert plan.slices_executed == 0
        assert gateway.transactions == []

    def test_insufficient_native_records_failed_slice(self, market):
        gateway = PaperGateway(balances={"ETH": 0.05})
        orchestrator = TradingOrchestrator(gateway, market)
        plan = orchestrator.create_dca_plan("USDC", 0.1, 1)

        [action] = asyncio.run(orchestrator.run_due_dca_slices())

        assert action.action_type == ActionType.HOLD
        assert action.reason.startswith("DCA slice 1/1 into USDC skipped: insufficient ETH")
        assert plan.executions[0].success is False
        assert plan.is_active
        assert orchestrator.get_history()[-1] == action

    def test_plans_persist_and_cancel(self, gateway, store):
        plan = TradingOrchestrator(gateway, store=store).create_dca_plan("USDC", 0.3, 3)

        restored = TradingOrchestrator(gateway, store=store)

        assert [p.id for p in restored.get_dca_plans()] == [plan.id]
        assert restored.cancel_dca_plan(plan.id) is True
        assert restored.cancel_dca_plan(plan.id) is False
        assert restored.get_dca_plans(active_only=True) == []
        assert store.load("dca-plans")[0]["status"] == "cancelled"

    def test_invalid_plan_rejected(self, orchestrator, gateway):
        with pytest.raises(ConfigError):
            orchestrator.create_dca_plan("ETH", 0.1, 2)

        assert orchestrator.get_dca_plans() == []


class TestPerformanceFacade:
    def test_metrics_after_exit(self, make_position, market, store, strategy):
        gateway, position = held_weth(make_position)
        orchestrator = TradingOrchestrator(gateway, market, store=store, strategy=strategy)
        orchestrator.ledger.add_position(position)

        asyncio.run(orchestrator.run_cycle())
        metrics = orchestrator.get_performance_metrics()

        assert metrics.total_trades == 1
        assert metrics.win_rate == 100.0
        assert metrics.total_pnl_usd == pytest.approx(50.0)
        assert metrics.best_trade_asset == "WETH"
        # Withdrawn WETH sits in the wallet
        [snapshot] = orchestrator.performance.equity_curve()
        assert snapshot.value_usd == pytest.approx(300.0)
        assert len(store.load("equity-snapshots")) == 1

    def test_swap_quote_facade(self, orchestrator, gateway):
        quote = asyncio.run(orchestrator.get_swap_quote("ETH", "USDC", 0.1))

        assert quote.success
        assert quote.amount_out == pytest.approx(299.1)
        assert gateway.transactions == []
