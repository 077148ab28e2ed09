"""
Exit/Entry Policy

Pure decision rules, no I/O.

Exit rules, first match wins:
1. P&L >= take profit                     -> EXIT "take profit"
2. P&L <= -stop loss (tightened in
   bearish/volatile regimes)              -> EXIT "stop loss"
3. price dropped >= trailing stop from
   the high-water mark                    -> EXIT "trailing stop"
4. otherwise                              -> HOLD

The trailing stop fires even when the position is still in profit.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .config import StrategyConfig, TradingConstants
from .models import MarketRegime, Opportunity, Position

TIGHTENING_REGIMES = (MarketRegime.BEARISH, MarketRegime.VOLATILE)


class PositionDecision(Enum):
    HOLD = "HOLD"
    EXIT = "EXIT"


class EntryDecision(Enum):
    ENTER = "ENTER"
    SKIP = "SKIP"


@dataclass(frozen=True)
class Decision:
    action: PositionDecision
    reason: str

    @property
    def is_exit(self) -> bool:
        return self.action == PositionDecision.EXIT


def effective_stop_loss(
    config: StrategyConfig,
    regime: Optional[MarketRegime] = None,
    constants: Optional[TradingConstants] = None,
) -> float:
    """Stop-loss percent after regime tightening."""
    constants = constants or TradingConstants()
    stop = config.stop_loss_percent
    if regime in TIGHTENING_REGIMES:
        stop *= 1 - constants.stop_loss.bearish_tightening_percent / 100
    return stop


def evaluate_position(
    position: Position,
    config: StrategyConfig,
    regime: Optional[MarketRegime] = None,
    constants: Optional[TradingConstants] = None,
) -> Decision:
    pnl_pct = position.unrealized_pnl_percent

    if pnl_pct >= config.take_profit_percent:
        return Decision(
            PositionDecision.EXIT,
            f"take profit: {pnl_pct:.2f}% >= {config.take_profit_percent:.2f}%",
        )

    stop = effective_stop_loss(config, regime, constants)
    if pnl_pct <= -stop:
        return Decision(PositionDecision.EXIT, f"stop loss: {pnl_pct:.2f}% <= -{stop:.2f}%")

    if position.trailing_stop_percent > 0 and position.high_water_mark > 0:
        drop = position.trailing_drop_percent
        if drop >= position.trailing_stop_percent:
            return Decision(
                PositionDecision.EXIT,
                f"trailing stop: {drop:.2f}% below high ${position.high_water_mark:.2f}",
            )

    return Decision(PositionDecision.HOLD, f"within bands: P&L {pnl_pct:.2f}%")


def evaluate_opportunity(opportunity: Opportunity, config: StrategyConfig) -> EntryDecision:
    """ENTER iff trading is enabled and the APY clears the threshold."""
    if config.enabled and opportunity.apy >= config.min_apy_threshold:
        return EntryDecision.ENTER
    return EntryDecision.SKIP


def should_rebalance(current_apy: float, candidate_apy: float, config: StrategyConfig) -> bool:
    return candidate_apy - current_apy >= config.rebalance_threshold
