"""
Performance Tracker for the Yield Trader

Performance statistics over the closed-trade history:
- Win rate, average win / loss and profit factor
- Best and worst trade, average hold time
- Max drawdown from the account equity curve
- Annualized Sharpe ratio of per-trade returns

Closed trades come from the ledger; the tracker itself only keeps the
equity curve (one snapshot per cycle, bounded).

Author: khopilot
"""

import logging
import math
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional

import numpy as np

from .config import TradingConstants
from .models import ClosedTrade, utc_now

logger = logging.getLogger("yield_trader.performance")

EQUITY_KEY = "equity-snapshots"


@dataclass
class EquitySnapshot:
    """Account value at a point in time."""
    timestamp: datetime
    value_usd: float

    def to_dict(self) -> Dict[str, Any]:
        return {"timestamp": self.timestamp.isoformat(), "value_usd": self.value_usd}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EquitySnapshot":
        return cls(
            timestamp=datetime.fromisoformat(data["timestamp"]),
            value_usd=float(data["value_usd"]),
        )


@dataclass
class PerformanceMetrics:
    """Current performance metrics snapshot."""
    total_trades: int
    winning_trades: int
    losing_trades: int
    win_rate: float  # 0-100
    avg_win_percent: float
    avg_loss_percent: float
    profit_factor: float  # gross profit / gross loss, inf without losses
    max_drawdown_percent: float
    sharpe_ratio: float
    best_trade_percent: Optional[float]
    best_trade_asset: Optional[str]
    worst_trade_percent: Optional[float]
    worst_trade_asset: Optional[str]
    avg_hold_time_hours: float
    total_pnl_usd: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_trades": self.total_trades,
            "winning_trades": self.winning_trades,
            "losing_trades": self.losing_trades,
            "win_rate": self.win_rate,
            "avg_win_percent": self.avg_win_percent,
            "avg_loss_percent": self.avg_loss_percent,
            "profit_factor": self.profit_factor,
            "max_drawdown_percent": self.max_drawdown_percent,
            "sharpe_ratio": self.sharpe_ratio,
            "best_trade": {
                "pnl_percent": self.best_trade_percent,
                "asset": self.best_trade_asset,
            } if self.best_trade_asset else None,
            "worst_trade": {
                "pnl_percent": self.worst_trade_percent,
                "asset": self.worst_trade_asset,
            } if self.worst_trade_asset else None,
            "avg_hold_time_hours": self.avg_hold_time_hours,
            "total_pnl_usd": self.total_pnl_usd,
        }


class PerformanceTracker:
    """
    Computes trade statistics and keeps the equity curve.

    Usage:
        tracker = PerformanceTracker(store, constants)
        tracker.record_equity(1250.0)
        metrics = tracker.get_metrics(ledger.closed_trades())
        print(tracker.format_metrics(metrics))
    """

    def __init__(self, store=None, constants: Optional[TradingConstants] = None):
        self.store = store
        self.constants = constants or TradingConstants()
        self._equity: Deque[EquitySnapshot] = deque(
            maxlen=self.constants.performance.max_equity_snapshots
        )

    def apply_limits(self) -> None:
        limit = self.constants.performance.max_equity_snapshots
        if self._equity.maxlen != limit:
            self._equity = deque(self._equity, maxlen=limit)

    def record_equity(self, value_usd: float, timestamp: Optional[datetime] = None) -> EquitySnapshot:
        snapshot = EquitySnapshot(timestamp=timestamp or utc_now(), value_usd=value_usd)
        self._equity.append(snapshot)
        logger.debug("Equity snapshot: $%.2f", value_usd)
        return snapshot

    def equity_curve(self) -> List[EquitySnapshot]:
        return list(self._equity)

    def max_drawdown_percent(self) -> float:
        """Largest peak-to-trough fall of the equity curve (0 with < 2 points)."""
        if len(self._equity) < 2:
            return 0.0

        values = np.array([s.value_usd for s in self._equity], dtype=float)
        peaks = np.maximum.accumulate(values)
        with np.errstate(divide="ignore", invalid="ignore"):
            drawdowns = np.where(peaks > 0, (peaks - values) / peaks * 100, 0.0)
        return float(drawdowns.max())

    def sharpe_ratio(self, returns_percent: List[float]) -> float:
        """Mean / sample std of per-trade returns, annualized at one trade a day."""
        if len(returns_percent) < 2:
            return 0.0
        returns = np.array(returns_percent, dtype=float)
        std = np.std(returns, ddof=1)
        if std == 0:
            return 0.0
        return float(np.mean(returns) / std * np.sqrt(self.constants.performance.annualization_days))

    def get_metrics(self, trades: List[ClosedTrade]) -> PerformanceMetrics:
        """Calculate metrics over the given closed trades."""
        if not trades:
            return self._empty_metrics()

        pnls = [t.realized_pnl for t in trades]
        returns = [t.realized_pnl_percent for t in trades]
        wins = [t for t in trades if t.realized_pnl > 0]
        losses = [t for t in trades if t.realized_pnl <= 0]

        win_rate = len(wins) / len(trades) * 100
        avg_win = np.mean([t.realized_pnl_percent for t in wins]) if wins else 0.0
        avg_loss = np.mean([t.realized_pnl_percent for t in losses]) if losses else 0.0

        gross_profit = sum(t.realized_pnl for t in wins)
        gross_loss = abs(sum(t.realized_pnl for t in losses))
        if gross_loss > 0:
            profit_factor = gross_profit / gross_loss
        else:
            profit_factor = math.inf if gross_profit > 0 else 0.0

        hold_hours = [
            (t.exit_time - t.position.entry_time).total_seconds() / 3600 for t in trades
        ]

        best = max(trades, key=lambda t: t.realized_pnl_percent)
        worst = min(trades, key=lambda t: t.realized_pnl_percent)

        return PerformanceMetrics(
            total_trades=len(trades),
            winning_trades=len(wins),
            losing_trades=len(losses),
            win_rate=round(win_rate, 1),
            avg_win_percent=round(float(avg_win), 2),
            avg_loss_percent=round(float(avg_loss), 2),
            profit_factor=round(profit_factor, 2) if math.isfinite(profit_factor) else profit_factor,
            max_drawdown_percent=round(self.max_drawdown_percent(), 2),
            sharpe_ratio=round(self.sharpe_ratio(returns), 2),
            best_trade_percent=round(best.realized_pnl_percent, 2),
            best_trade_asset=best.position.asset,
            worst_trade_percent=round(worst.realized_pnl_percent, 2),
            worst_trade_asset=worst.position.asset,
            avg_hold_time_hours=round(float(np.mean(hold_hours)), 1),
            total_pnl_usd=round(sum(pnls), 2),
        )

    def _empty_metrics(self) -> PerformanceMetrics:
        return PerformanceMetrics(
            total_trades=0,
            winning_trades=0,
            losing_trades=0,
            win_rate=0.0,
            avg_win_percent=0.0,
            avg_loss_percent=0.0,
            profit_factor=0.0,
            max_drawdown_percent=round(self.max_drawdown_percent(), 2),
            sharpe_ratio=0.0,
            best_trade_percent=None,
            best_trade_asset=None,
            worst_trade_percent=None,
            worst_trade_asset=None,
            avg_hold_time_hours=0.0,
            total_pnl_usd=0.0,
        )

    def format_metrics(self, metrics: PerformanceMetrics) -> str:
        """Human-readable summary."""
        lines = [
            "=== Performance ===",
            f"Trades: {metrics.total_trades} ({metrics.winning_trades}W / {metrics.losing_trades}L)",
            f"Win rate: {metrics.win_rate:.1f}%",
            f"Avg win: {metrics.avg_win_percent:+.2f}% | Avg loss: {metrics.avg_loss_percent:+.2f}%",
            f"Profit factor: {metrics.profit_factor:.2f}",
            f"Max drawdown: {metrics.max_drawdown_percent:.2f}%",
            f"Sharpe: {metrics.sharpe_ratio:.2f}",
            f"Avg hold: {metrics.avg_hold_time_hours:.1f}h",
            f"Total P&L: ${metrics.total_pnl_usd:,.2f}",
        ]
        if metrics.best_trade_asset:
            lines.append(
                f"Best: {metrics.best_trade_asset} {metrics.best_trade_percent:+.2f}% | "
                f"Worst: {metrics.worst_trade_asset} {metrics.worst_trade_percent:+.2f}%"
            )
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> None:
        if self.store is None:
            return
        for raw in self.store.load(EQUITY_KEY, []) or []:
            try:
                self._equity.append(EquitySnapshot.from_dict(raw))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping unreadable equity snapshot: %s", e)

    def save(self) -> bool:
        if self.store is None:
            return True
        return self.store.save(EQUITY_KEY, [s.to_dict() for s in self._equity])
