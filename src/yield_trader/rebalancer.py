"""
Rebalance Executor

Two phases, best effort, not transactional:

1. Withdraw: every open position with a supported asset is withdrawn in
   full and its confirmation awaited. A failed withdrawal is logged, that
   asset is excluded from redeploy and the loop continues.
2. Redeploy: for each recommended opportunity the deposit amount comes
   from the first source that yields a positive amount:
     a. wallet balance of the target asset above its dust threshold
     b. the sibling asset (USDC <-> WETH) swapped into the target
     c. native balance minus the gas reserve, wrapped (and swapped)
   Each successful supply opens a Position in the ledger.

Author: khopilot
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

from .config import TradingConstants
from .gateway import ALL, Gateway, guarded
from .ledger import PositionLedger
from .models import (
    Opportunity,
    OutcomeStatus,
    Position,
    StepRecord,
    StepStatus,
)
from .ranker import RebalanceRecommendation
from .swaps import SwapRouter
from .tokens import NATIVE_SYMBOL, is_native, is_stablecoin, normalize_symbol, sibling_of

logger = logging.getLogger("yield_trader.rebalancer")


@dataclass
class RebalanceReport:
    status: OutcomeStatus
    withdrawals: List[StepRecord] = field(default_factory=list)
    deposits: List[StepRecord] = field(default_factory=list)
    opened: List[Position] = field(default_factory=list)
    error: str = ""

    @property
    def tx_refs(self) -> List[str]:
        return [s.tx_ref for s in self.withdrawals + self.deposits if s.tx_ref]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "withdrawals": [s.to_dict() for s in self.withdrawals],
            "deposits": [s.to_dict() for s in self.deposits],
            "opened": [p.id for p in self.opened],
            "error": self.error,
        }


class RebalanceExecutor:
    """Executes an approved RebalanceRecommendation against the gateway."""

    def __init__(
        self,
        gateway: Gateway,
        ledger: PositionLedger,
        swaps: Optional[SwapRouter] = None,
        constants: Optional[TradingConstants] = None,
    ):
        self.gateway = gateway
        self.ledger = ledger
        self.constants = constants or TradingConstants()
        self.swaps = swaps or SwapRouter(gateway, self.constants)

    def _price_of(self, asset: str, prices: Dict[str, float]) -> float:
        if asset in prices:
            return prices[asset]
        return 1.0 if is_stablecoin(asset) else 0.0

    async def _balance(self, asset: str) -> float:
        try:
            return await self.gateway.get_balance(asset)
        except Exception as e:
            logger.error("Balance read for %s failed: %s", asset, e)
            return 0.0

    async def _confirm(self, tx_ref: Optional[str]) -> None:
        if not tx_ref:
            return
        try:
            await self.gateway.wait_for_transaction(
                tx_ref, self.constants.rebalance.confirmations
            )
        except Exception as e:
            logger.warning("Confirmation wait for %s failed: %s", tx_ref, e)

    async def rebalance(
        self,
        recommendation: RebalanceRecommendation,
        prices: Optional[Dict[str, float]] = None,
    ) -> RebalanceReport:
        prices = prices or {}
        report = RebalanceReport(status=OutcomeStatus.SKIPPED)

        logger.info(
            "Executing rebalance: %d positions -> %d targets",
            len(self.ledger.open_positions()),
            len(recommendation.recommended),
        )

        failed_assets = await self._withdraw_phase(report, prices)
        await self._redeploy_phase(report, recommendation.recommended, failed_assets, prices)

        failures = [s for s in report.withdrawals + report.deposits if s.status == StepStatus.FAILED]
        if report.opened:
            report.status = OutcomeStatus.SUCCESS
        elif failures:
            report.status = OutcomeStatus.ERROR
            report.error = "; ".join(s.details.get("error", s.action) for s in failures)
        else:
            report.status = OutcomeStatus.SKIPPED
            report.error = "No deposit executed"

        logger.info(
            "Rebalance finished: %s (%d opened, %d failed steps)",
            report.status.value,
            len(report.opened),
            len(failures),
        )
        return report

    # ------------------------------------------------------------------
    # Phase 1
    # ------------------------------------------------------------------

    async def _withdraw_phase(
        self, report: RebalanceReport, prices: Dict[str, float]
    ) -> Set[str]:
        failed: Set[str] = set()
        withdrawn: Dict[str, Optional[str]] = {}
        clear_on_failure = self.constants.rebalance.clear_on_failed_withdrawal

        for position in self.ledger.open_positions():
            asset = normalize_symbol(position.asset)
            if asset is None:
                logger.warning("Position %s has unknown asset %s, kept", position.id, position.asset)
                report.withdrawals.append(
                    StepRecord(
                        "withdraw",
                        StepStatus.SKIPPED,
                        details={"position_id": position.id, "reason": "unknown asset"},
                    )
                )
                continue

            price = self._price_of(asset, prices) or position.current_price

            # Several positions on one asset share a single withdraw-all
            if asset in withdrawn:
                self.ledger.close_position(position.id, "rebalance", tx_ref=withdrawn[asset], exit_price=price)
                continue
            if asset in failed:
                if clear_on_failure:
                    self.ledger.close_position(position.id, "rebalance: withdrawal failed", exit_price=price)
                continue

            result = await guarded(f"withdraw {asset}", self.gateway.withdraw(asset, ALL))
            if not result.success:
                logger.error("Withdrawal of %s failed: %s", asset, result.error)
                failed.add(asset)
                report.withdrawals.append(
                    StepRecord(
                        "withdraw",
                        StepStatus.FAILED,
                        details={"position_id": position.id, "asset": asset, "error": result.error},
                    )
                )
                if clear_on_failure:
                    self.ledger.close_position(position.id, "rebalance: withdrawal failed", exit_price=price)
                continue

            await self._confirm(result.tx_ref)
            withdrawn[asset] = result.tx_ref
            self.ledger.close_position(position.id, "rebalance", tx_ref=result.tx_ref, exit_price=price)
            report.withdrawals.append(
                StepRecord(
                    "withdraw",
                    StepStatus.COMPLETE,
                    tx_ref=result.tx_ref,
                    details={"position_id": position.id, "asset": asset, "amount": result.amount},
                )
            )

        return failed

    # ------------------------------------------------------------------
    # Phase 2
    # ------------------------------------------------------------------

    async def _redeploy_phase(
        self,
        report: RebalanceReport,
        targets: List[Opportunity],
        failed_assets: Set[str],
        prices: Dict[str, float],
    ) -> None:
        for opportunity in targets:
            target = normalize_symbol(opportunity.asset)
            details = {"venue": opportunity.venue, "asset": opportunity.asset}

            if target is None or is_native(target):
                report.deposits.append(
                    StepRecord("deposit", StepStatus.SKIPPED, details={**details, "reason": "unsupported asset"})
                )
                continue
            if target in failed_assets:
                report.deposits.append(
                    StepRecord(
                        "deposit",
                        StepStatus.SKIPPED,
                        details={**details, "reason": f"withdrawal of {target} failed"},
                    )
                )
                continue

            amount, source, error = await self._fund_target(target)
            if error:
                report.deposits.append(
                    StepRecord("deposit", StepStatus.FAILED, details={**details, "error": error})
                )
                continue
            if amount <= 0:
                logger.info("No funds available to deposit into %s", target)
                report.deposits.append(
                    StepRecord("deposit", StepStatus.SKIPPED, details={**details, "reason": "no funds available"})
                )
                continue

            supplied = await guarded(f"supply {target}", self.gateway.supply(target, amount))
            if not supplied.success:
                report.deposits.append(
                    StepRecord("deposit", StepStatus.FAILED, details={**details, "error": supplied.error})
                )
                continue
            await self._confirm(supplied.tx_ref)

            price = self._price_of(target, prices)
            if price <= 0:
                logger.warning(
                    "No price for %s; position opened with zero entry value, exits cannot trigger",
                    target,
                )
            position = Position.open(
                venue=opportunity.venue,
                strategy=opportunity.strategy,
                asset=target,
                amount=amount,
                price=price,
                apy=opportunity.apy,
                trailing_stop_percent=self.constants.trailing_stop.default_percent,
            )
            self.ledger.add_position(position)
            report.opened.append(position)
            report.deposits.append(
                StepRecord(
                    "deposit",
                    StepStatus.COMPLETE,
                    tx_ref=supplied.tx_ref,
                    details={**details, "amount": amount, "source": source, "position_id": position.id},
                )
            )

    async def _fund_target(self, target: str) -> Tuple[float, str, str]:
        """
        Find the deposit amount for target.

        Returns:
            (amount, source, error); amount 0 with no error means no funds.
        """
        dust = self.constants.dust

        held = await self._balance(target)
        if held > dust.threshold_for(target):
            logger.info("Using existing %s: %.8f", target, held)
            return held, "balance", ""

        sibling = sibling_of(target)
        if sibling:
            sibling_balance = await self._balance(sibling)
            if sibling_balance > dust.threshold_for(sibling):
                logger.info("Swapping %s -> %s: %.8f", sibling, target, sibling_balance)
                swap = await self.swaps.swap_tokens(sibling, target, sibling_balance)
                if not swap.success:
                    return 0.0, "sibling", f"Swap {sibling}->{target} failed: {swap.error}"
                await self._confirm(swap.tx_ref)
                return swap.amount_out, "sibling", ""

        native = await self._balance(NATIVE_SYMBOL)
        if native > dust.threshold_for(NATIVE_SYMBOL):
            spendable = native - self.constants.gas.reserve_eth
            if spendable > 0:
                logger.info("Converting %.8f ETH -> %s (gas reserve kept)", spendable, target)
                swap = await self.swaps.swap_tokens(NATIVE_SYMBOL, target, spendable)
                if not swap.success:
                    return 0.0, "native", f"Swap ETH->{target} failed: {swap.error}"
                await self._confirm(swap.tx_ref)
                return swap.amount_out, "native", ""

        return 0.0, "", ""
