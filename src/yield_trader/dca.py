"""
DCA Plans

Splits an entry into equal slices executed on a fixed interval. The
manager only schedules and records; the orchestrator executes due slices
through swap_and_supply and reports each outcome back.

A failed slice is recorded but does not advance the schedule, so it is
retried on the next pass. A plan completes once every slice succeeded.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from .config import ConfigError, TradingConstants
from .models import utc_now
from .tokens import is_native, normalize_symbol

logger = logging.getLogger("yield_trader.dca")

DCA_PLANS_KEY = "dca-plans"


class DcaStatus(Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass
class DcaExecution:
    slice_number: int
    amount_eth: float
    success: bool
    executed_at: datetime
    tx_ref: Optional[str] = None
    error: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "slice_number": self.slice_number,
            "amount_eth": self.amount_eth,
            "success": self.success,
            "executed_at": self.executed_at.isoformat(),
            "tx_ref": self.tx_ref,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DcaExecution":
        return cls(
            slice_number=int(data["slice_number"]),
            amount_eth=float(data["amount_eth"]),
            success=bool(data["success"]),
            executed_at=datetime.fromisoformat(data["executed_at"]),
            tx_ref=data.get("tx_ref"),
            error=data.get("error", ""),
        )


@dataclass
class DcaPlan:
    """Scheduled entry of total_amount_eth into asset, num_slices at a time."""

    id: str
    asset: str
    total_amount_eth: float
    num_slices: int
    interval_seconds: float
    created_at: datetime
    next_execution_at: datetime
    venue: str = "Aave V3"
    strategy: str = "Auto-enter best"
    slices_executed: int = 0
    status: DcaStatus = DcaStatus.ACTIVE
    executions: List[DcaExecution] = field(default_factory=list)

    @property
    def amount_per_slice(self) -> float:
        return self.total_amount_eth / self.num_slices

    @property
    def is_active(self) -> bool:
        return self.status == DcaStatus.ACTIVE

    def is_due(self, now: datetime) -> bool:
        return self.is_active and self.next_execution_at <= now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "asset": self.asset,
            "total_amount_eth": self.total_amount_eth,
            "num_slices": self.num_slices,
            "interval_seconds": self.interval_seconds,
            "amount_per_slice": self.amount_per_slice,
            "venue": self.venue,
            "strategy": self.strategy,
            "slices_executed": self.slices_executed,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "next_execution_at": self.next_execution_at.isoformat(),
            "executions": [e.to_dict() for e in self.executions],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DcaPlan":
        return cls(
            id=data["id"],
            asset=data["asset"],
            total_amount_eth=float(data["total_amount_eth"]),
            num_slices=int(data["num_slices"]),
            interval_seconds=float(data["interval_seconds"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            next_execution_at=datetime.fromisoformat(data["next_execution_at"]),
            venue=data.get("venue", "Aave V3"),
            strategy=data.get("strategy", "Auto-enter best"),
            slices_executed=int(data.get("slices_executed", 0)),
            status=DcaStatus(data.get("status", DcaStatus.ACTIVE.value)),
            executions=[DcaExecution.from_dict(e) for e in data.get("executions", [])],
        )


class DcaPlanManager:
    """Creates, schedules and records DCA plans. Persisted under `dca-plans`."""

    def __init__(self, store=None, constants: Optional[TradingConstants] = None):
        self.store = store
        self.constants = constants or TradingConstants()
        self._plans: Dict[str, DcaPlan] = {}

    def create_plan(
        self,
        asset: str,
        total_amount_eth: float,
        num_slices: int,
        interval_seconds: Optional[float] = None,
        venue: str = "Aave V3",
        strategy: str = "Auto-enter best",
        now: Optional[datetime] = None,
    ) -> DcaPlan:
        """
        Schedule a new plan. The first slice is due immediately.

        Raises:
            ConfigError: unsupported asset, non-positive amount or interval,
                slice count outside 1..dca.max_slices
        """
        symbol = normalize_symbol(asset)
        if symbol is None or is_native(symbol):
            raise ConfigError(f"Unsupported DCA asset: {asset}")
        if total_amount_eth <= 0:
            raise ConfigError(f"total_amount_eth must be positive, got {total_amount_eth}")
        if not 1 <= num_slices <= self.constants.dca.max_slices:
            raise ConfigError(
                f"num_slices must be within 1..{self.constants.dca.max_slices}, got {num_slices}"
            )
        if interval_seconds is None:
            interval_seconds = self.constants.dca.default_interval_seconds
        if interval_seconds <= 0:
            raise ConfigError(f"interval_seconds must be positive, got {interval_seconds}")

        now = now or utc_now()
        plan_id = f"dca-{int(now.timestamp() * 1000)}"
        n = 1
        while plan_id in self._plans:
            plan_id = f"dca-{int(now.timestamp() * 1000)}-{n}"
            n += 1

        plan = DcaPlan(
            id=plan_id,
            asset=symbol,
            total_amount_eth=total_amount_eth,
            num_slices=num_slices,
            interval_seconds=interval_seconds,
            created_at=now,
            next_execution_at=now,
            venue=venue,
            strategy=strategy,
        )
        self._plans[plan.id] = plan
        logger.info(
            "DCA plan %s: %.6f ETH into %s over %d slices every %.0fs",
            plan.id,
            total_amount_eth,
            symbol,
            num_slices,
            interval_seconds,
        )
        return plan

    def due_plans(self, now: Optional[datetime] = None) -> List[DcaPlan]:
        now = now or utc_now()
        return [p for p in self._plans.values() if p.is_due(now)]

    def record_execution(
        self,
        plan_id: str,
        success: bool,
        tx_ref: Optional[str] = None,
        error: str = "",
        now: Optional[datetime] = None,
    ) -> Optional[DcaPlan]:
        plan = self._plans.get(plan_id)
        if plan is None:
            logger.warning("Cannot record execution: unknown DCA plan %s", plan_id)
            return None

        now = now or utc_now()
        plan.executions.append(
            DcaExecution(
                slice_number=plan.slices_executed + 1,
                amount_eth=plan.amount_per_slice,
                success=success,
                executed_at=now,
                tx_ref=tx_ref,
                error=error,
            )
        )
        limit = self.constants.dca.max_execution_history
        if len(plan.executions) > limit:
            plan.executions = plan.executions[-limit:]

        if success:
            plan.slices_executed += 1
            plan.next_execution_at = now + timedelta(seconds=plan.interval_seconds)
        if plan.slices_executed >= plan.num_slices:
            plan.status = DcaStatus.COMPLETED
            logger.info("DCA plan %s completed", plan.id)
        return plan

    def cancel_plan(self, plan_id: str) -> bool:
        """Cancel an active plan. False when unknown or no longer active."""
        plan = self._plans.get(plan_id)
        if plan is None or not plan.is_active:
            return False
        plan.status = DcaStatus.CANCELLED
        logger.info("DCA plan %s cancelled", plan_id)
        return True

    def get_plan(self, plan_id: str) -> Optional[DcaPlan]:
        return self._plans.get(plan_id)

    def active_plans(self) -> List[DcaPlan]:
        return [p for p in self._plans.values() if p.is_active]

    def all_plans(self) -> List[DcaPlan]:
        return list(self._plans.values())

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> None:
        if self.store is None:
            return
        for raw in self.store.load(DCA_PLANS_KEY, []) or []:
            try:
                plan = DcaPlan.from_dict(raw)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping unreadable DCA plan: %s", e)
                continue
            self._plans[plan.id] = plan

    def save(self) -> bool:
        if self.store is None:
            return True
        return self.store.save(DCA_PLANS_KEY, [p.to_dict() for p in self._plans.values()])
