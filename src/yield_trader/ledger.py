"""
Position Ledger

Holds open positions, the closed-trade history and a bounded ring of
trading actions. Single writer: only the orchestrator's cycle and the
rebalance executor mutate it.

Author: khopilot
"""

import logging
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Set

from .config import TradingConstants
from .models import ClosedTrade, Position, TradingAction, utc_now

logger = logging.getLogger("yield_trader.ledger")

POSITIONS_KEY = "positions"
CLOSED_TRADES_KEY = "closed-trades"
HISTORY_KEY = "trade-history"


class PositionLedger:
    """
    Open positions keyed by id, closed trades, and the action log.

    Position ids are never reused: an id colliding with any id seen before
    (open or closed) gets a numeric suffix on insertion.
    """

    def __init__(self, store=None, constants: Optional[TradingConstants] = None):
        self.store = store
        self.constants = constants or TradingConstants()

        self._positions: Dict[str, Position] = {}
        self._closed: Deque[ClosedTrade] = deque(maxlen=self.constants.history.max_closed_trades)
        self._history: Deque[TradingAction] = deque(maxlen=self.constants.history.max_actions)
        self._seen_ids: Set[str] = set()

    def apply_limits(self) -> None:
        """Re-bound the history rings after the history constants change."""
        history = self.constants.history
        if self._history.maxlen != history.max_actions:
            self._history = deque(self._history, maxlen=history.max_actions)
        if self._closed.maxlen != history.max_closed_trades:
            self._closed = deque(self._closed, maxlen=history.max_closed_trades)

    # ------------------------------------------------------------------
    # Positions
    # ------------------------------------------------------------------

    def add_position(self, position: Position) -> Position:
        if position.id in self._seen_ids:
            n = 1
            while f"{position.id}-{n}" in self._seen_ids:
                n += 1
            position.id = f"{position.id}-{n}"
        self._seen_ids.add(position.id)
        self._positions[position.id] = position

        logger.info(
            "Position opened: %s %.6f %s @ $%.2f (apy %.2f%%)",
            position.id,
            position.entry_amount,
            position.asset,
            position.entry_price,
            position.apy,
        )
        return position

    def get_position(self, position_id: str) -> Optional[Position]:
        return self._positions.get(position_id)

    def open_positions(self) -> List[Position]:
        return list(self._positions.values())

    @property
    def has_open_positions(self) -> bool:
        return bool(self._positions)

    @property
    def total_value(self) -> float:
        return sum(p.current_value for p in self._positions.values())

    def close_position(
        self,
        position_id: str,
        reason: str,
        tx_ref: Optional[str] = None,
        exit_price: Optional[float] = None,
        exit_value: Optional[float] = None,
    ) -> Optional[ClosedTrade]:
        """
        Move an open position to the closed-trade history.

        Exit price/value default to the position's live snapshot.
        """
        position = self._positions.pop(position_id, None)
        if position is None:
            logger.warning("Cannot close %s: not an open position", position_id)
            return None

        price = position.current_price if exit_price is None else exit_price
        value = position.current_amount * price if exit_value is None else exit_value
        trade = ClosedTrade(
            position=position,
            exit_price=price,
            exit_value=value,
            exit_time=utc_now(),
            reason=reason,
            tx_ref=tx_ref,
        )
        self._closed.append(trade)

        logger.info(
            "Position closed: %s (%s) P&L $%.2f (%.2f%%)",
            position_id,
            reason,
            trade.realized_pnl,
            trade.realized_pnl_percent,
        )
        return trade

    def closed_trades(self) -> List[ClosedTrade]:
        return list(self._closed)

    # ------------------------------------------------------------------
    # Action history
    # ------------------------------------------------------------------

    def record_action(self, action: TradingAction) -> None:
        self._history.append(action)
        logger.debug("Action %s: %s", action.action_type.value, action.reason)

    def get_history(self, limit: Optional[int] = None) -> List[TradingAction]:
        """Most recent actions, oldest first."""
        items = list(self._history)
        if limit is None:
            return items
        if limit <= 0:
            return []
        return items[-limit:]

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_portfolio_pnl(self) -> Dict[str, Any]:
        """Aggregate unrealized and realized P&L."""
        positions = self.open_positions()
        entry_value = sum(p.entry_value for p in positions)
        current_value = sum(p.current_value for p in positions)
        unrealized = current_value - entry_value
        realized = sum(t.realized_pnl for t in self._closed)

        return {
            "open_positions": len(positions),
            "closed_trades": len(self._closed),
            "total_entry_value": entry_value,
            "total_current_value": current_value,
            "unrealized_pnl": unrealized,
            "unrealized_pnl_percent": (unrealized / entry_value * 100) if entry_value else 0.0,
            "realized_pnl": realized,
            "total_pnl": unrealized + realized,
            "earned_interest": sum(p.earned_interest for p in positions),
        }

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> None:
        """Restore from the store; unreadable records are skipped."""
        if self.store is None:
            return

        for raw in self.store.load(POSITIONS_KEY, []) or []:
            try:
                position = Position.from_dict(raw)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping unreadable position record: %s", e)
                continue
            self._positions[position.id] = position
            self._seen_ids.add(position.id)

        for raw in self.store.load(CLOSED_TRADES_KEY, []) or []:
            try:
                trade = ClosedTrade.from_dict(raw)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping unreadable closed trade: %s", e)
                continue
            self._closed.append(trade)
            self._seen_ids.add(trade.position.id)

        for raw in self.store.load(HISTORY_KEY, []) or []:
            try:
                self._history.append(TradingAction.from_dict(raw))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping unreadable action record: %s", e)

        logger.info(
            "Ledger loaded: %d open, %d closed, %d actions",
            len(self._positions),
            len(self._closed),
            len(self._history),
        )

    def save(self) -> bool:
        if self.store is None:
            return True
        ok = self.store.save(POSITIONS_KEY, [p.to_dict() for p in self._positions.values()])
        ok = self.store.save(CLOSED_TRADES_KEY, [t.to_dict() for t in self._closed]) and ok
        ok = self.store.save(HISTORY_KEY, [a.to_dict() for a in self._history]) and ok
        if not ok:
            logger.warning("Ledger persisted partially")
        return ok
