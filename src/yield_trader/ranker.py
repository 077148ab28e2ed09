"""
Opportunity Ranker

Ranks yield opportunities, compares the proposed allocation with the
current one and gates rebalances on improvement, gas break-even and a
cooldown between approved rebalances.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import numpy as np

from .config import RISK_TOLERANCE_TIERS, ConfigError, StrategyConfig, TradingConstants
from .models import Opportunity, Position, utc_now

logger = logging.getLogger("yield_trader.ranker")


@dataclass
class RebalanceRecommendation:
    current_positions: List[Position]
    recommended: List[Opportunity]
    current_apy: float
    proposed_apy: float
    expected_improvement: float
    gas_cost_usd: float
    should_rebalance: bool
    notional_usd: float
    reason: str = ""
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current_positions": [p.id for p in self.current_positions],
            "recommended": [o.to_dict() for o in self.recommended],
            "current_apy": self.current_apy,
            "proposed_apy": self.proposed_apy,
            "expected_improvement": self.expected_improvement,
            "gas_cost_usd": self.gas_cost_usd,
            "should_rebalance": self.should_rebalance,
            "notional_usd": self.notional_usd,
            "reason": self.reason,
        }


def blended_apy(positions: List[Position]) -> float:
    """Value-weighted APY of open positions (0 with none)."""
    if not positions:
        return 0.0
    apys = np.array([p.apy for p in positions], dtype=float)
    values = np.array([p.current_value for p in positions], dtype=float)
    if values.sum() <= 0:
        return float(apys.mean())
    return float(np.average(apys, weights=values))


class OpportunityRanker:
    """
    Recommend and gate rebalances.

    The rebalance gate is stateful: approving a rebalance starts the
    cooldown, so a second identical call within the interval is rejected.
    """

    def __init__(
        self,
        config: StrategyConfig,
        constants: Optional[TradingConstants] = None,
    ):
        self.config = config
        self.constants = constants or TradingConstants()
        self.last_rebalance: Optional[datetime] = None

    def rank(self, opportunities: List[Opportunity]) -> List[Opportunity]:
        return sorted(opportunities, key=lambda o: o.apy, reverse=True)

    def filter_by_risk(
        self, opportunities: List[Opportunity], risk_tolerance: Optional[str] = None
    ) -> List[Opportunity]:
        tolerance = risk_tolerance or self.constants.rebalance.risk_tolerance
        if tolerance not in RISK_TOLERANCE_TIERS:
            raise ConfigError(
                f"Unknown risk tolerance {tolerance!r}. Valid: {', '.join(RISK_TOLERANCE_TIERS)}"
            )
        allowed = RISK_TOLERANCE_TIERS[tolerance]
        return [o for o in opportunities if o.risk in allowed]

    def recommend(
        self, opportunities: List[Opportunity], positions: List[Position]
    ) -> RebalanceRecommendation:
        top_n = self.constants.rebalance.top_opportunities
        selected = self.rank(opportunities)[:top_n]

        current = blended_apy(positions)
        proposed = float(np.mean([o.apy for o in selected])) if selected else 0.0
        improvement = proposed - current

        notional = sum(p.current_value for p in positions)
        if notional <= 0:
            notional = self.constants.rebalance.reference_notional_usd

        should = bool(selected) and improvement > self.config.rebalance_threshold

        logger.info(
            "Allocation: current %.2f%% -> proposed %.2f%% (improvement %.2f%%)",
            current,
            proposed,
            improvement,
        )

        return RebalanceRecommendation(
            current_positions=list(positions),
            recommended=selected,
            current_apy=current,
            proposed_apy=proposed,
            expected_improvement=improvement,
            gas_cost_usd=self.constants.gas.cost_estimate_usd,
            should_rebalance=should,
            notional_usd=notional,
            reason=f"APY improvement: {improvement:.2f}%",
        )

    def break_even_days(
        self, recommendation: RebalanceRecommendation, notional_usd: Optional[float] = None
    ) -> float:
        """Days of extra yield needed to pay back the gas cost (inf if no gain)."""
        notional = recommendation.notional_usd if notional_usd is None else notional_usd
        daily_gain = notional * recommendation.expected_improvement / 100 / 365
        if daily_gain <= 0:
            return float("inf")
        return recommendation.gas_cost_usd / daily_gain

    def should_rebalance(
        self,
        recommendation: RebalanceRecommendation,
        notional_usd: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Approve a rebalance.

        Requires the improvement threshold, gas break-even within
        rebalance.break_even_days, and the cooldown since the last approval.
        Approval records `now` as the last rebalance time.
        """
        now = now or utc_now()

        if not recommendation.should_rebalance:
            logger.debug("Rebalance rejected: improvement below threshold")
            return False

        days = self.break_even_days(recommendation, notional_usd)
        if days >= self.constants.rebalance.break_even_days:
            logger.info(
                "Rebalance rejected: break-even %.1f days >= %.1f",
                days,
                self.constants.rebalance.break_even_days,
            )
            return False

        cooldown = timedelta(seconds=self.constants.rebalance.interval_seconds)
        if self.last_rebalance is not None and now - self.last_rebalance < cooldown:
            logger.info("Rebalance rejected: cooldown active since %s", self.last_rebalance)
            return False

        self.last_rebalance = now
        logger.info("Rebalance approved (break-even %.1f days)", days)
        return True
