"""
Trading Cycle Orchestrator

Runs one decision cycle at a time against a single wallet:

1. Refresh prices and accrued interest (best effort)
2. Market snapshot (optional; without one there is no regime gating)
3. Evaluate every open position; execute exits when trading is enabled
4. Scan opportunities
5. Gate and execute at most one entry (only with no open positions),
   then any due DCA slices
6. Record an equity snapshot, persist ledger and history (best effort)

Also exposes the public facade: strategy/constants management, leverage
loops, swaps and quotes, the rebalance optimizer, compounding, DCA plans,
performance metrics and the emergency withdraw.

Author: khopilot
"""

import asyncio
import copy
import logging
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional

from .config import StrategyConfig, TradingConstants
from .dca import DcaPlan, DcaPlanManager
from .gateway import Gateway, guarded
from .ledger import PositionLedger
from .leverage import LeverageManager, LoopResult
from .models import (
    ActionType,
    ClosedTrade,
    CycleResult,
    MarketSnapshot,
    Opportunity,
    OutcomeStatus,
    Position,
    RecommendedAction,
    TradingAction,
    utc_now,
)
from .performance import PerformanceMetrics, PerformanceTracker
from .policy import EntryDecision, evaluate_opportunity, evaluate_position
from .ranker import OpportunityRanker, RebalanceRecommendation
from .rebalancer import RebalanceExecutor, RebalanceReport
from .swaps import SwapAndSupplyResult, SwapOutcome, SwapQuote, SwapRouter
from .tokens import NATIVE_SYMBOL, TOKENS, WRAPPED_NATIVE_SYMBOL, is_stablecoin, normalize_symbol

logger = logging.getLogger("yield_trader.orchestrator")

CONSTANTS_KEY = "trading-config"
STRATEGY_KEY = "strategy"
SUPPLY_BASELINE_KEY = "supply-baseline"


@dataclass
class OptimizeResult:
    status: OutcomeStatus
    reason: str
    recommendation: Optional[RebalanceRecommendation] = None
    report: Optional[RebalanceReport] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "reason": self.reason,
            "recommendation": self.recommendation.to_dict() if self.recommendation else None,
            "report": self.report.to_dict() if self.report else None,
        }


@dataclass
class DryRunResult:
    """Analysis of what a cycle would do. Nothing executed, nothing persisted."""

    decisions: List[Dict[str, Any]] = field(default_factory=list)
    opportunities: List[Opportunity] = field(default_factory=list)
    snapshot: Optional[MarketSnapshot] = None
    entry_candidate: Optional[Opportunity] = None
    gating_reason: str = ""
    portfolio: Dict[str, Any] = field(default_factory=dict)
    timestamp: Any = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": "DRY_RUN",
            "trades_executed": 0,
            "decisions": self.decisions,
            "opportunities": [o.to_dict() for o in self.opportunities],
            "snapshot": {
                "regime": self.snapshot.regime.value,
                "recommended_action": self.snapshot.recommended_action.value,
                "confidence": self.snapshot.confidence,
            } if self.snapshot else None,
            "entry_candidate": self.entry_candidate.to_dict() if self.entry_candidate else None,
            "gating_reason": self.gating_reason,
            "portfolio": self.portfolio,
            "timestamp": self.timestamp.isoformat(),
        }


class TradingOrchestrator:
    """
    Single decision-maker for one wallet.

    Collaborators are injected. market_data and opportunity_source are
    optional: without market data prices are not refreshed and there is no
    regime gating; without an opportunity source nothing is entered.
    """

    def __init__(
        self,
        gateway: Gateway,
        market_data=None,
        opportunity_source=None,
        store=None,
        strategy: Optional[StrategyConfig] = None,
        constants: Optional[TradingConstants] = None,
    ):
        self.gateway = gateway
        self.market_data = market_data
        self.opportunity_source = opportunity_source
        self.store = store
        self.strategy = strategy or StrategyConfig()
        self.constants = constants or TradingConstants()

        self._load_persisted_config()

        self.ledger = PositionLedger(store, self.constants)
        self.ledger.load()
        self.swaps = SwapRouter(gateway, self.constants)
        self.ranker = OpportunityRanker(self.strategy, self.constants)
        self.rebalancer = RebalanceExecutor(gateway, self.ledger, self.swaps, self.constants)
        self.leverage = LeverageManager(gateway, self.swaps, self.constants)
        self.performance = PerformanceTracker(store, self.constants)
        self.performance.load()
        self.dca = DcaPlanManager(store, self.constants)
        self.dca.load()

        self._last_prices: Dict[str, float] = {}
        # Venue supplied balance per asset at the last sync; growth beyond
        # it is interest shared pro rata by that asset's positions
        self._supply_baseline: Dict[str, float] = {}
        if store is not None:
            stored = store.load(SUPPLY_BASELINE_KEY, {})
            if isinstance(stored, dict):
                self._supply_baseline.update(stored)
        self._running = False
        self._stop_event: Optional[asyncio.Event] = None

        logger.info(
            "TradingOrchestrator initialized: enabled=%s, mode=%s, %d open positions",
            self.strategy.enabled,
            self.strategy.mode,
            len(self.ledger.open_positions()),
        )

    @classmethod
    def from_config(
        cls,
        config: dict,
        gateway: Gateway,
        market_data=None,
        opportunity_source=None,
        store=None,
    ) -> "TradingOrchestrator":
        """Create from a loaded config dictionary (`strategy:` and `constants:`)."""
        return cls(
            gateway=gateway,
            market_data=market_data,
            opportunity_source=opportunity_source,
            store=store,
            strategy=StrategyConfig.from_config(config),
            constants=TradingConstants.from_dict(config.get("constants")),
        )

    def _load_persisted_config(self) -> None:
        """Stored overrides win over the constructor's values."""
        if self.store is None:
            return

        stored_constants = self.store.load(CONSTANTS_KEY)
        if isinstance(stored_constants, dict):
            try:
                self._replace_constants(self.constants.merged_with(stored_constants))
            except ValueError as e:
                logger.warning("Ignoring stored trading constants: %s", e)

        stored_strategy = self.store.load(STRATEGY_KEY)
        if isinstance(stored_strategy, dict):
            try:
                self.strategy.update(stored_strategy)
            except ValueError as e:
                logger.warning("Ignoring stored strategy: %s", e)

    def _replace_constants(self, new: TradingConstants) -> None:
        # Components share this object, so mutate it in place
        for f in fields(new):
            setattr(self.constants, f.name, getattr(new, f.name))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _record(self, action: TradingAction, actions: List[TradingAction]) -> None:
        actions.append(action)
        self.ledger.record_action(action)

    def _price_for(self, asset: str) -> Optional[float]:
        symbol = normalize_symbol(asset) or asset
        if symbol in self._last_prices:
            return self._last_prices[symbol]
        if symbol == WRAPPED_NATIVE_SYMBOL and NATIVE_SYMBOL in self._last_prices:
            return self._last_prices[NATIVE_SYMBOL]
        if is_stablecoin(symbol):
            return 1.0
        return None

    def _persist(self) -> None:
        try:
            self.ledger.save()
            self.performance.save()
            self.dca.save()
            if self.store is not None:
                self.store.save(SUPPLY_BASELINE_KEY, dict(self._supply_baseline))
        except Exception as e:
            logger.error("Failed to persist ledger: %s", e)

    async def _refresh_prices(self) -> Dict[str, float]:
        """Fetch prices and apply them to open positions. Never raises."""
        if self.market_data is None:
            return dict(self._last_prices)

        symbols = {NATIVE_SYMBOL, WRAPPED_NATIVE_SYMBOL}
        symbols.update(p.asset for p in self.ledger.open_positions())

        try:
            prices = await self.market_data.get_prices(sorted(symbols))
        except Exception as e:
            logger.warning("Price refresh failed: %s", e)
            return dict(self._last_prices)

        if NATIVE_SYMBOL in prices and WRAPPED_NATIVE_SYMBOL not in prices:
            prices[WRAPPED_NATIVE_SYMBOL] = prices[NATIVE_SYMBOL]
        self._last_prices.update(prices)

        for position in self.ledger.open_positions():
            price = self._price_for(position.asset)
            if price is not None:
                position.update_price(price)
        await self._accrue_interest()

        logger.debug("Prices updated: %s", self._last_prices)
        return dict(self._last_prices)

    async def _read_supplied(self, asset: str) -> Optional[float]:
        try:
            return await self.gateway.get_supplied(asset)
        except Exception as e:
            logger.debug("Supplied balance read failed for %s: %s", asset, e)
            return None

    async def _accrue_interest(self) -> None:
        """
        Credit interest to open positions from the venue's supplied balances.

        A supplied balance is per asset and can hold funds no position owns
        (leverage collateral, direct supplies). Positions keep their own
        amounts; only the growth of the balance since the last sync is
        applied, pro rata. Growth above accrual.max_refresh_growth_percent
        is an outside deposit and only moves the baseline.
        """
        by_asset: Dict[str, List[Position]] = {}
        for position in self.ledger.open_positions():
            by_asset.setdefault(position.asset, []).append(position)

        max_growth = self.constants.accrual.max_refresh_growth_percent
        for asset, positions in by_asset.items():
            supplied = await self._read_supplied(asset)
            if supplied is None:
                continue
            baseline = self._supply_baseline.get(asset)
            self._supply_baseline[asset] = supplied
            if not baseline or supplied == baseline:
                continue

            growth = (supplied - baseline) / baseline * 100
            if growth < 0:
                logger.warning(
                    "Supplied %s fell from %.8f to %.8f outside the engine", asset, baseline, supplied
                )
                continue
            if growth > max_growth:
                logger.warning(
                    "Supplied %s grew %.2f%% since last sync; treated as a deposit, not interest",
                    asset,
                    growth,
                )
                continue

            ratio = supplied / baseline
            for position in positions:
                position.update_amount(position.current_amount * ratio)
            logger.debug("Accrued %.4f%% on %d %s positions", growth, len(positions), asset)

    async def _sync_supply(self, *assets: str) -> None:
        """Take the current supplied balances as the accrual baseline."""
        for asset in assets:
            symbol = normalize_symbol(asset) or asset
            supplied = await self._read_supplied(symbol)
            if supplied is not None:
                self._supply_baseline[symbol] = supplied

    async def _account_equity(self) -> Optional[float]:
        """Wallet balances plus supplied collateral minus debt, in USD."""
        try:
            health = await self.gateway.get_account_health()
            equity = health.total_collateral_usd - health.total_debt_usd
            for symbol in TOKENS:
                price = self._price_for(symbol)
                if price is None:
                    continue
                equity += await self.gateway.get_balance(symbol) * price
        except Exception as e:
            logger.debug("Equity read failed: %s", e)
            return None
        return equity

    async def _market_snapshot(self) -> Optional[MarketSnapshot]:
        if self.market_data is None or not hasattr(self.market_data, "get_market_snapshot"):
            return None
        try:
            return await self.market_data.get_market_snapshot()
        except Exception as e:
            logger.warning("Market snapshot unavailable: %s", e)
            return None

    async def _scan_opportunities(self) -> List[Opportunity]:
        if self.opportunity_source is None:
            return []
        opportunities = await self.opportunity_source.list_opportunities()
        logger.info("Found %d opportunities", len(opportunities))
        return opportunities

    def _entry_gate(self, snapshot: Optional[MarketSnapshot]) -> Optional[str]:
        """Reason entries are blocked by the market, or None."""
        if snapshot is None:
            return None
        if snapshot.recommended_action == RecommendedAction.EXIT:
            return f"market gating: {snapshot.regime.value} market recommends exit"
        threshold = self.constants.confidence.market_skip_threshold
        if snapshot.recommended_action == RecommendedAction.WAIT and snapshot.confidence > threshold:
            return (
                f"market gating: wait signal at {snapshot.confidence:.0f}% confidence "
                f"(> {threshold:.0f}%)"
            )
        return None

    def _best_opportunity(self, opportunities: List[Opportunity]) -> Optional[Opportunity]:
        candidates = [
            o for o in opportunities
            if evaluate_opportunity(o, self.strategy) == EntryDecision.ENTER
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda o: o.apy)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _exit_position(self, position: Position, reason: str) -> TradingAction:
        # Only the position's own share: other positions and leverage
        # collateral may sit in the same reserve
        result = await guarded(
            f"withdraw {position.asset}",
            self.gateway.withdraw(position.asset, position.current_amount),
        )
        if not result.success:
            logger.error("Exit of %s failed: %s", position.id, result.error)
            return TradingAction(
                ActionType.EXIT,
                f"{reason} (exit failed: {result.error})",
                position_id=position.id,
            )

        exit_value = result.amount * position.current_price if result.amount else None
        self.ledger.close_position(position.id, reason, tx_ref=result.tx_ref, exit_value=exit_value)
        await self._sync_supply(position.asset)
        return TradingAction(ActionType.EXIT, reason, position_id=position.id, tx_ref=result.tx_ref)

    async def _enter_position(self, opportunity: Opportunity) -> TradingAction:
        size_eth = min(self.strategy.max_position_size_eth, self.constants.entry.default_size_eth)
        reason = (
            f"Entering {opportunity.venue} {opportunity.strategy} @ {opportunity.apy:.2f}% APY"
        )

        try:
            native = await self.gateway.get_balance(NATIVE_SYMBOL)
        except Exception as e:
            return TradingAction(
                ActionType.ENTER, f"{reason} (entry failed: {e})", opportunity=opportunity.to_dict()
            )
        if native - self.constants.gas.reserve_eth < size_eth:
            return TradingAction(
                ActionType.HOLD,
                f"entry skipped: insufficient ETH ({native:.6f}) for {size_eth} plus gas reserve",
                opportunity=opportunity.to_dict(),
            )

        outcome, position = await self._supply_from_native(
            opportunity.asset, size_eth, opportunity.venue, opportunity.strategy, opportunity.apy
        )
        if position is None:
            return TradingAction(
                ActionType.ENTER,
                f"{reason} (entry failed: {outcome.error})",
                opportunity=opportunity.to_dict(),
            )
        return TradingAction(
            ActionType.ENTER,
            reason,
            position_id=position.id,
            opportunity=opportunity.to_dict(),
            tx_ref=outcome.supply_tx_ref,
        )

    async def _supply_from_native(
        self, asset: str, size_eth: float, venue: str, strategy: str, apy: float
    ):
        """Swap native into asset, supply it and open the ledger position."""
        outcome = await self.swaps.swap_and_supply(NATIVE_SYMBOL, asset, size_eth)
        if not outcome.success:
            return outcome, None

        symbol = normalize_symbol(asset)
        price = self._price_for(symbol)
        if price is None:
            price = 0.0
            logger.warning(
                "No price for %s; position opened with zero entry value, exits cannot trigger",
                symbol,
            )

        position = self.ledger.add_position(
            Position.open(
                venue=venue,
                strategy=strategy,
                asset=symbol,
                amount=outcome.amount_supplied,
                price=price,
                apy=apy,
                trailing_stop_percent=self.constants.trailing_stop.default_percent,
            )
        )
        await self._sync_supply(symbol)
        return outcome, position

    async def _execute_due_dca(
        self, opportunities: Optional[List[Opportunity]] = None
    ) -> List[TradingAction]:
        """Execute every due DCA slice; each success opens a position."""
        actions: List[TradingAction] = []
        for plan in self.dca.due_plans():
            size_eth = plan.amount_per_slice
            slice_label = f"DCA slice {plan.slices_executed + 1}/{plan.num_slices} into {plan.asset}"
            apy = max(
                (o.apy for o in opportunities or [] if normalize_symbol(o.asset) == plan.asset),
                default=0.0,
            )

            try:
                native = await self.gateway.get_balance(NATIVE_SYMBOL)
            except Exception as e:
                self.dca.record_execution(plan.id, success=False, error=str(e))
                actions.append(TradingAction(ActionType.ENTER, f"{slice_label} (entry failed: {e})"))
                continue
            if native - self.constants.gas.reserve_eth < size_eth:
                error = f"insufficient ETH ({native:.6f}) for {size_eth} plus gas reserve"
                self.dca.record_execution(plan.id, success=False, error=error)
                actions.append(TradingAction(ActionType.HOLD, f"{slice_label} skipped: {error}"))
                continue

            outcome, position = await self._supply_from_native(
                plan.asset, size_eth, plan.venue, plan.strategy, apy
            )
            if position is None:
                self.dca.record_execution(plan.id, success=False, error=outcome.error)
                actions.append(
                    TradingAction(ActionType.ENTER, f"{slice_label} (entry failed: {outcome.error})")
                )
                continue

            self.dca.record_execution(plan.id, success=True, tx_ref=outcome.supply_tx_ref)
            actions.append(
                TradingAction(
                    ActionType.ENTER,
                    slice_label,
                    position_id=position.id,
                    tx_ref=outcome.supply_tx_ref,
                )
            )
        return actions

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> CycleResult:
        """Run one trading cycle. Always returns a CycleResult."""
        result = CycleResult(success=True)
        logger.info("Starting trading cycle (enabled=%s)", self.strategy.enabled)

        try:
            await self._refresh_prices()
            snapshot = await self._market_snapshot()
            regime = snapshot.regime if snapshot else None

            positions = self.ledger.open_positions()
            result.positions_checked = len(positions)
            for position in positions:
                decision = evaluate_position(position, self.strategy, regime, self.constants)
                if not decision.is_exit:
                    action = TradingAction(ActionType.HOLD, decision.reason, position_id=position.id)
                elif self.strategy.enabled:
                    logger.info("Exit signal for %s: %s", position.id, decision.reason)
                    action = await self._exit_position(position, decision.reason)
                else:
                    action = TradingAction(
                        ActionType.EXIT,
                        f"{decision.reason} (not executed: trading disabled)",
                        position_id=position.id,
                    )
                self._record(action, result.actions)

            opportunities = await self._scan_opportunities()
            result.opportunities_scanned = len(opportunities)

            gate = self._entry_gate(snapshot)
            if gate:
                logger.info("Entry blocked: %s", gate)
                self._record(TradingAction(ActionType.HOLD, gate), result.actions)
            elif self.strategy.enabled:
                if not self.ledger.has_open_positions:
                    best = self._best_opportunity(opportunities)
                    if best is not None:
                        self._record(await self._enter_position(best), result.actions)
                    else:
                        logger.info(
                            "No opportunity meets min APY %.2f%%", self.strategy.min_apy_threshold
                        )
                for action in await self._execute_due_dca(opportunities):
                    self._record(action, result.actions)

            equity = await self._account_equity()
            if equity is not None:
                self.performance.record_equity(equity)

        except Exception as e:
            logger.exception("Trading cycle failed: %s", e)
            result.success = False
            result.error = str(e) or type(e).__name__

        self._persist()
        logger.info(
            "Trading cycle complete: %d actions, %d positions checked, %d opportunities",
            len(result.actions),
            result.positions_checked,
            result.opportunities_scanned,
        )
        return result

    async def run_dry_run_cycle(self) -> DryRunResult:
        """Evaluate as run_cycle would, on copies. No trades, no persistence."""
        result = DryRunResult()

        prices = dict(self._last_prices)
        if self.market_data is not None:
            symbols = {NATIVE_SYMBOL, WRAPPED_NATIVE_SYMBOL}
            symbols.update(p.asset for p in self.ledger.open_positions())
            try:
                prices.update(await self.market_data.get_prices(sorted(symbols)))
            except Exception as e:
                logger.warning("Dry run price fetch failed: %s", e)
        if NATIVE_SYMBOL in prices and WRAPPED_NATIVE_SYMBOL not in prices:
            prices[WRAPPED_NATIVE_SYMBOL] = prices[NATIVE_SYMBOL]
        result.snapshot = await self._market_snapshot()
        regime = result.snapshot.regime if result.snapshot else None

        for original in self.ledger.open_positions():
            position = copy.deepcopy(original)
            price = prices.get(position.asset)
            if price is not None:
                position.update_price(price)
            decision = evaluate_position(position, self.strategy, regime, self.constants)
            result.decisions.append(
                {
                    "position_id": position.id,
                    "asset": position.asset,
                    "action": decision.action.value,
                    "reason": decision.reason,
                    "unrealized_pnl_percent": position.unrealized_pnl_percent,
                    "would_execute": decision.is_exit and self.strategy.enabled,
                }
            )

        try:
            result.opportunities = await self._scan_opportunities()
        except Exception as e:
            logger.warning("Dry run opportunity scan failed: %s", e)

        result.gating_reason = self._entry_gate(result.snapshot) or ""
        if not result.gating_reason and not self.ledger.has_open_positions:
            result.entry_candidate = self._best_opportunity(result.opportunities)

        result.portfolio = self.ledger.get_portfolio_pnl()
        return result

    async def run_forever(self, interval_seconds: float) -> None:
        """Run cycles back to back, sleeping between them, until stop()."""
        self._running = True
        self._stop_event = asyncio.Event()
        logger.info("Entering trading loop (interval %.0fs)", interval_seconds)

        while self._running:
            result = await self.run_cycle()
            if not result.success:
                logger.warning("Cycle reported failure: %s", result.error)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                pass

        logger.info("Trading loop stopped")

    def stop(self) -> None:
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()

    async def close(self) -> None:
        """Persist and release collaborator sessions."""
        self._persist()
        for collaborator in (self.market_data, self.opportunity_source):
            close = getattr(collaborator, "close", None)
            if close is not None:
                await close()

    # ------------------------------------------------------------------
    # Facade: ledger
    # ------------------------------------------------------------------

    def get_positions(self) -> List[Position]:
        return self.ledger.open_positions()

    def get_closed_trades(self) -> List[ClosedTrade]:
        return self.ledger.closed_trades()

    def get_portfolio_pnl(self) -> Dict[str, Any]:
        return self.ledger.get_portfolio_pnl()

    def get_history(self, limit: Optional[int] = None) -> List[TradingAction]:
        return self.ledger.get_history(limit)

    # ------------------------------------------------------------------
    # Facade: strategy and constants
    # ------------------------------------------------------------------

    def get_strategy(self) -> Dict[str, Any]:
        return self.strategy.to_dict()

    def set_strategy(self, updates: Dict[str, Any]) -> Dict[str, Any]:
        """Partial update; raises ConfigError without changing anything."""
        self.strategy.update(updates)
        self._save_strategy()
        return self.get_strategy()

    def set_mode(self, mode: str) -> Dict[str, Any]:
        self.strategy.apply_mode(mode)
        self._save_strategy()
        logger.info("Trading mode set to %s", mode)
        return self.get_strategy()

    def enable(self) -> Dict[str, Any]:
        logger.info("Autonomous trading ENABLED")
        return self.set_strategy({"enabled": True})

    def disable(self) -> Dict[str, Any]:
        logger.info("Autonomous trading DISABLED")
        return self.set_strategy({"enabled": False})

    def _save_strategy(self) -> None:
        if self.store is not None:
            self.store.save(STRATEGY_KEY, self.strategy.to_dict())

    def get_constants(self) -> Dict[str, Any]:
        return self.constants.to_dict()

    def update_constants(self, updates: Dict[str, Any]) -> Dict[str, Any]:
        """Deep-merge a partial update, validate, apply and persist."""
        merged = self.constants.merged_with(updates)
        self._replace_constants(merged)
        self.ledger.apply_limits()
        self.performance.apply_limits()
        if self.store is not None:
            self.store.save(CONSTANTS_KEY, self.constants.to_dict())
        logger.info("Trading constants updated: %s", sorted(updates))
        return self.get_constants()

    # ------------------------------------------------------------------
    # Facade: execution
    # ------------------------------------------------------------------

    async def swap_tokens(
        self,
        token_in: str,
        token_out: str,
        amount: float,
        slippage_percent: Optional[float] = None,
    ) -> SwapOutcome:
        return await self.swaps.swap_tokens(token_in, token_out, amount, slippage_percent)

    async def swap_and_supply(
        self,
        token_in: str,
        token_out: str,
        amount: float,
        slippage_percent: Optional[float] = None,
    ) -> SwapAndSupplyResult:
        """Swap and supply outside any position; the supply is not credited as interest."""
        result = await self.swaps.swap_and_supply(token_in, token_out, amount, slippage_percent)
        await self._sync_supply(token_out)
        return result

    async def get_swap_quote(
        self,
        token_in: str,
        token_out: str,
        amount: float,
        slippage_percent: Optional[float] = None,
    ) -> SwapQuote:
        return await self.swaps.get_swap_quote(token_in, token_out, amount, slippage_percent)

    async def open_leveraged_position(
        self,
        supply_asset: str,
        borrow_asset: str,
        initial_amount: float,
        loops: int = 2,
        min_health_factor: float = 1.5,
        borrow_price: Optional[float] = None,
    ) -> LoopResult:
        if borrow_price is None:
            borrow_price = self._price_for(borrow_asset)
        result = await self.leverage.open_position(
            supply_asset, borrow_asset, initial_amount, loops, min_health_factor, borrow_price
        )
        await self._sync_supply(supply_asset)
        return result

    async def close_leveraged_position(
        self,
        supply_asset: str,
        debt_asset: str,
        max_iterations: Optional[int] = None,
        min_health_factor: float = 1.2,
        supply_price: Optional[float] = None,
    ) -> LoopResult:
        if supply_price is None:
            supply_price = self._price_for(supply_asset)
        result = await self.leverage.close_position(
            supply_asset, debt_asset, max_iterations, min_health_factor, supply_price
        )
        await self._sync_supply(supply_asset)
        return result

    async def optimize_positions(self) -> OptimizeResult:
        """Recommend, gate and (when approved) execute a rebalance."""
        try:
            prices = await self._refresh_prices()
            opportunities = self.ranker.filter_by_risk(await self._scan_opportunities())
        except Exception as e:
            logger.error("Optimization aborted: %s", e)
            return OptimizeResult(OutcomeStatus.ERROR, str(e) or type(e).__name__)

        recommendation = self.ranker.recommend(opportunities, self.ledger.open_positions())
        if not self.ranker.should_rebalance(recommendation):
            return OptimizeResult(
                OutcomeStatus.SKIPPED,
                "No rebalancing needed at this time",
                recommendation=recommendation,
            )

        return await self._execute_rebalance(recommendation, prices, recommendation.reason)

    async def _execute_rebalance(
        self,
        recommendation: RebalanceRecommendation,
        prices: Dict[str, float],
        reason: str,
    ) -> OptimizeResult:
        assets = {p.asset for p in self.ledger.open_positions()}
        report = await self.rebalancer.rebalance(recommendation, prices)
        assets.update(p.asset for p in report.opened)
        await self._sync_supply(*sorted(assets))

        action = TradingAction(
            ActionType.REBALANCE,
            f"{reason} ({report.status.value})",
            tx_ref=report.tx_refs[-1] if report.tx_refs else None,
        )
        self.ledger.record_action(action)
        self._persist()

        return OptimizeResult(
            report.status,
            reason if report.status != OutcomeStatus.ERROR else report.error,
            recommendation=recommendation,
            report=report,
        )

    async def compound_yield(self) -> OptimizeResult:
        """
        Withdraw every position, interest included, and redeploy it all into
        the best opportunity allowed by the risk tolerance.

        Unlike optimize_positions this is not gated on improvement or
        cooldown; it is skipped when the tracked value is below
        rebalance.compound_min_value_usd.
        """
        try:
            prices = await self._refresh_prices()
            opportunities = self.ranker.filter_by_risk(await self._scan_opportunities())
        except Exception as e:
            logger.error("Compounding aborted: %s", e)
            return OptimizeResult(OutcomeStatus.ERROR, str(e) or type(e).__name__)

        minimum = self.constants.rebalance.compound_min_value_usd
        if self.ledger.total_value < minimum:
            return OptimizeResult(
                OutcomeStatus.SKIPPED,
                f"Insufficient yield to compound (${self.ledger.total_value:.2f} < ${minimum:.2f})",
            )
        ranked = self.ranker.rank(opportunities)
        if not ranked:
            return OptimizeResult(OutcomeStatus.SKIPPED, "No opportunity to compound into")

        best = ranked[0]
        recommendation = self.ranker.recommend([best], self.ledger.open_positions())
        reason = f"Compound into {best.venue} {best.asset} @ {best.apy:.2f}% APY"
        logger.info("%s: $%.2f tracked", reason, self.ledger.total_value)
        return await self._execute_rebalance(recommendation, prices, reason)

    async def emergency_withdraw(self) -> List[TradingAction]:
        """
        Stop the loop, disable trading and withdraw every open position.

        Positions whose withdrawal fails stay in the ledger and are
        reported with an EXIT "(exit failed: ...)" action.
        """
        logger.warning("EMERGENCY WITHDRAW: exiting %d positions", len(self.ledger.open_positions()))
        self.stop()
        self.disable()

        await self._refresh_prices()
        actions: List[TradingAction] = []
        for position in self.ledger.open_positions():
            self._record(await self._exit_position(position, "emergency withdraw"), actions)

        self._persist()
        return actions

    # ------------------------------------------------------------------
    # Facade: DCA and performance
    # ------------------------------------------------------------------

    def create_dca_plan(
        self,
        asset: str,
        total_amount_eth: float,
        num_slices: int,
        interval_seconds: Optional[float] = None,
    ) -> DcaPlan:
        """Schedule a DCA plan; raises ConfigError before any I/O."""
        plan = self.dca.create_plan(asset, total_amount_eth, num_slices, interval_seconds)
        self.dca.save()
        return plan

    def cancel_dca_plan(self, plan_id: str) -> bool:
        cancelled = self.dca.cancel_plan(plan_id)
        if cancelled:
            self.dca.save()
        return cancelled

    def get_dca_plans(self, active_only: bool = False) -> List[DcaPlan]:
        return self.dca.active_plans() if active_only else self.dca.all_plans()

    async def run_due_dca_slices(self) -> List[TradingAction]:
        """Execute due slices now, outside the cycle. Not gated on `enabled`."""
        await self._refresh_prices()
        try:
            opportunities = await self._scan_opportunities()
        except Exception as e:
            logger.warning("Opportunity scan failed, slices open without APY: %s", e)
            opportunities = []

        actions: List[TradingAction] = []
        for action in await self._execute_due_dca(opportunities):
            self._record(action, actions)
        self._persist()
        return actions

    def get_performance_metrics(self) -> PerformanceMetrics:
        return self.performance.get_metrics(self.ledger.closed_trades())
