"""
Data Models for the Yield Trader

Positions, opportunities, trading actions, market snapshots and the
result types shared by the gateway, the loop managers and the orchestrator.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ActionType(Enum):
    """Trading action types recorded in the history log."""

    ENTER = "ENTER"
    EXIT = "EXIT"
    HOLD = "HOLD"
    REBALANCE = "REBALANCE"


class RiskTier(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class MarketRegime(Enum):
    BULLISH = "bullish"
    BEARISH = "bearish"
    NEUTRAL = "neutral"
    VOLATILE = "volatile"


class RecommendedAction(Enum):
    ENTER = "enter"
    WAIT = "wait"
    EXIT = "exit"


class StepStatus(Enum):
    """Status of a single step inside a multi-step operation."""

    COMPLETE = "complete"
    SKIPPED = "skipped"
    FAILED = "failed"


class OutcomeStatus(Enum):
    """Overall outcome of a public operation."""

    SUCCESS = "success"
    SKIPPED = "skipped"
    ERROR = "error"


@dataclass
class Position:
    """
    One open deployment of capital into a yield-bearing venue.

    Entry fields are fixed at creation. Live fields are only touched by
    `update_price` / `update_amount` (the price refresh step).
    """

    id: str
    venue: str
    strategy: str
    asset: str

    # Entry snapshot
    entry_amount: float
    entry_price: float
    entry_value: float
    entry_time: datetime

    # Live snapshot
    current_amount: float = 0.0
    current_price: float = 0.0
    current_value: float = 0.0
    apy: float = 0.0

    high_water_mark: float = 0.0
    trailing_stop_percent: float = 0.0
    earned_interest: float = 0.0

    @classmethod
    def open(
        cls,
        venue: str,
        strategy: str,
        asset: str,
        amount: float,
        price: float,
        apy: float = 0.0,
        trailing_stop_percent: float = 0.0,
        entry_time: Optional[datetime] = None,
    ) -> "Position":
        """Create a freshly entered position; live snapshot equals entry."""
        entry_time = entry_time or utc_now()
        position_id = f"{venue}-{asset}-{int(entry_time.timestamp() * 1000)}"
        value = amount * price
        return cls(
            id=position_id,
            venue=venue,
            strategy=strategy,
            asset=asset,
            entry_amount=amount,
            entry_price=price,
            entry_value=value,
            entry_time=entry_time,
            current_amount=amount,
            current_price=price,
            current_value=value,
            apy=apy,
            high_water_mark=price,
            trailing_stop_percent=trailing_stop_percent,
        )

    @property
    def unrealized_pnl(self) -> float:
        return self.current_value - self.entry_value

    @property
    def unrealized_pnl_percent(self) -> float:
        if self.entry_value == 0:
            return 0.0
        return (self.unrealized_pnl / self.entry_value) * 100

    @property
    def trailing_drop_percent(self) -> float:
        """Percent the current price sits below the high-water mark."""
        if self.high_water_mark <= 0:
            return 0.0
        return (self.high_water_mark - self.current_price) / self.high_water_mark * 100

    def update_price(self, price: float) -> None:
        """Apply a fresh price; the high-water mark only ever rises."""
        self.current_price = price
        self.current_value = self.current_amount * price
        if price > self.high_water_mark:
            self.high_water_mark = price

    def update_amount(self, amount: float) -> None:
        """Apply accrued interest reported by the venue."""
        if amount > self.current_amount:
            self.earned_interest += amount - self.current_amount
        self.current_amount = amount
        self.current_value = amount * self.current_price

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "venue": self.venue,
            "strategy": self.strategy,
            "asset": self.asset,
            "entry_amount": self.entry_amount,
            "entry_price": self.entry_price,
            "entry_value": self.entry_value,
            "entry_time": self.entry_time.isoformat(),
            "current_amount": self.current_amount,
            "current_price": self.current_price,
            "current_value": self.current_value,
            "apy": self.apy,
            "high_water_mark": self.high_water_mark,
            "trailing_stop_percent": self.trailing_stop_percent,
            "earned_interest": self.earned_interest,
            "unrealized_pnl": self.unrealized_pnl,
            "unrealized_pnl_percent": self.unrealized_pnl_percent,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Position":
        return cls(
            id=data["id"],
            venue=data.get("venue", ""),
            strategy=data.get("strategy", ""),
            asset=data.get("asset", ""),
            entry_amount=float(data["entry_amount"]),
            entry_price=float(data["entry_price"]),
            entry_value=float(data["entry_value"]),
            entry_time=datetime.fromisoformat(data["entry_time"]),
            current_amount=float(data.get("current_amount", data["entry_amount"])),
            current_price=float(data.get("current_price", data["entry_price"])),
            current_value=float(data.get("current_value", data["entry_value"])),
            apy=float(data.get("apy", 0.0)),
            high_water_mark=float(data.get("high_water_mark", data["entry_price"])),
            trailing_stop_percent=float(data.get("trailing_stop_percent", 0.0)),
            earned_interest=float(data.get("earned_interest", 0.0)),
        )


@dataclass
class ClosedTrade:
    """A position that has been exited. Never re-opened."""

    position: Position
    exit_price: float
    exit_value: float
    exit_time: datetime
    reason: str
    tx_ref: Optional[str] = None

    @property
    def realized_pnl(self) -> float:
        return self.exit_value - self.position.entry_value

    @property
    def realized_pnl_percent(self) -> float:
        if self.position.entry_value == 0:
            return 0.0
        return self.realized_pnl / self.position.entry_value * 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position": self.position.to_dict(),
            "exit_price": self.exit_price,
            "exit_value": self.exit_value,
            "exit_time": self.exit_time.isoformat(),
            "reason": self.reason,
            "tx_ref": self.tx_ref,
            "realized_pnl": self.realized_pnl,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClosedTrade":
        return cls(
            position=Position.from_dict(data["position"]),
            exit_price=float(data["exit_price"]),
            exit_value=float(data["exit_value"]),
            exit_time=datetime.fromisoformat(data["exit_time"]),
            reason=data.get("reason", ""),
            tx_ref=data.get("tx_ref"),
        )


@dataclass
class Opportunity:
    """Candidate venue + asset pair with an advertised yield."""

    venue: str
    strategy: str
    asset: str
    apy: float
    risk: RiskTier = RiskTier.LOW
    tvl_usd: float = 0.0
    chain: str = "base"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "venue": self.venue,
            "strategy": self.strategy,
            "asset": self.asset,
            "apy": self.apy,
            "risk": self.risk.value,
            "tvl_usd": self.tvl_usd,
            "chain": self.chain,
        }


@dataclass(frozen=True)
class TradingAction:
    """Immutable log record of a decision taken (or not) during a cycle."""

    action_type: ActionType
    reason: str
    position_id: Optional[str] = None
    opportunity: Optional[Dict[str, Any]] = None
    timestamp: datetime = field(default_factory=utc_now)
    tx_ref: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.action_type.value,
            "reason": self.reason,
            "position_id": self.position_id,
            "opportunity": self.opportunity,
            "timestamp": self.timestamp.isoformat(),
            "tx_ref": self.tx_ref,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TradingAction":
        return cls(
            action_type=ActionType(data["type"]),
            reason=data.get("reason", ""),
            position_id=data.get("position_id"),
            opportunity=data.get("opportunity"),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            tx_ref=data.get("tx_ref"),
        )


@dataclass
class MarketSnapshot:
    """Advisory market signal produced by a market data collaborator."""

    regime: MarketRegime
    recommended_action: RecommendedAction
    confidence: float  # 0-100
    price: float = 0.0
    change_24h: float = 0.0
    timestamp: datetime = field(default_factory=utc_now)


@dataclass
class AccountHealth:
    """Lending account summary; health_factor is inf without debt."""

    total_collateral_usd: float
    total_debt_usd: float
    available_borrows_usd: float
    health_factor: float

    @property
    def has_debt(self) -> bool:
        return self.total_debt_usd > 0 and not math.isinf(self.health_factor)


@dataclass
class TxResult:
    """Uniform result of one gateway call."""

    success: bool
    tx_ref: Optional[str] = None
    amount: float = 0.0
    error: str = ""

    @classmethod
    def failed(cls, error: str) -> "TxResult":
        return cls(success=False, error=error)


@dataclass
class Quote:
    """Venue quote for a swap; nothing is executed."""

    amount_out: float
    price_impact_percent: float = 0.0
    gas_estimate_eth: float = 0.0


@dataclass
class StepRecord:
    """One entry in an operation's ordered step log."""

    action: str
    status: StepStatus
    tx_ref: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "status": self.status.value,
            "tx_ref": self.tx_ref,
            "details": self.details,
        }


@dataclass
class CycleResult:
    """Result of one trading cycle. Always produced, never left in progress."""

    success: bool
    actions: List[TradingAction] = field(default_factory=list)
    positions_checked: int = 0
    opportunities_scanned: int = 0
    error: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "actions": [a.to_dict() for a in self.actions],
            "positions_checked": self.positions_checked,
            "opportunities_scanned": self.opportunities_scanned,
            "error": self.error,
        }
