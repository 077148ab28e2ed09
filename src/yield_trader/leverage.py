"""
Leverage Loop Manager

Open: supply -> (borrow -> swap -> re-supply) x loops
Close: (withdraw -> swap -> repay) until the debt is gone

Both loops read account health before every iteration and refuse any step
that would push the health factor below the caller's minimum. Every step
lands in an ordered log returned with the result.

Author: khopilot
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .config import TradingConstants
from .gateway import Gateway, guarded
from .models import AccountHealth, OutcomeStatus, StepRecord, StepStatus
from .swaps import SwapRouter
from .tokens import is_native, is_stablecoin, normalize_symbol

logger = logging.getLogger("yield_trader.leverage")


@dataclass
class LoopResult:
    """Outcome of a leverage open/close loop."""

    status: OutcomeStatus
    steps: List[StepRecord] = field(default_factory=list)
    final_health_factor: Optional[float] = None
    total_collateral_usd: Optional[float] = None
    total_debt_usd: Optional[float] = None
    error: str = ""

    @property
    def success(self) -> bool:
        return self.status == OutcomeStatus.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        hf = self.final_health_factor
        return {
            "status": self.status.value,
            "steps": [s.to_dict() for s in self.steps],
            "final_health_factor": None if hf is None or math.isinf(hf) else hf,
            "total_collateral_usd": self.total_collateral_usd,
            "total_debt_usd": self.total_debt_usd,
            "error": self.error,
        }


class LeverageManager:
    """
    Leveraged lending loops over a Gateway.

    Borrow sizing per open iteration:
        b = borrow_fraction * available_borrows_usd
        capped so the health factor right after the borrow (before the
        re-supply adds collateral) stays >= min_health_factor:
            with debt:    HF * D / (D + b) >= min
            without debt: C * LT / b       >= min
    """

    def __init__(
        self,
        gateway: Gateway,
        swaps: Optional[SwapRouter] = None,
        constants: Optional[TradingConstants] = None,
    ):
        self.gateway = gateway
        self.constants = constants or TradingConstants()
        self.swaps = swaps or SwapRouter(gateway, self.constants)

    async def _health(self) -> AccountHealth:
        return await self.gateway.get_account_health()

    @staticmethod
    def _finish(result: LoopResult, health: AccountHealth) -> LoopResult:
        result.final_health_factor = health.health_factor
        result.total_collateral_usd = health.total_collateral_usd
        result.total_debt_usd = health.total_debt_usd
        return result

    @staticmethod
    def _fail(result: LoopResult, step: StepRecord, error: str) -> LoopResult:
        step.status = StepStatus.FAILED
        step.details["error"] = error
        result.steps.append(step)
        result.status = OutcomeStatus.ERROR
        result.error = error
        logger.error("%s failed: %s", step.action, error)
        return result

    def max_borrow_usd(self, health: AccountHealth, min_health_factor: float) -> float:
        """Largest borrow (USD) that keeps the post-borrow HF >= min."""
        if health.has_debt:
            return max(0.0, health.total_debt_usd * (health.health_factor / min_health_factor - 1))
        lt = self.constants.leverage.assumed_liquidation_threshold
        return health.total_collateral_usd * lt / min_health_factor

    @staticmethod
    def max_withdraw_usd(health: AccountHealth, min_health_factor: float) -> float:
        """Largest withdrawal (USD) that keeps the post-withdraw HF >= min."""
        if not health.has_debt:
            return health.total_collateral_usd
        return max(0.0, health.total_collateral_usd * (1 - min_health_factor / health.health_factor))

    def _price_or_none(self, asset: str, price: Optional[float]) -> Optional[float]:
        if price is not None:
            return price if price > 0 else None
        return 1.0 if is_stablecoin(asset) else None

    # ------------------------------------------------------------------
    # Open
    # ------------------------------------------------------------------

    async def open_position(
        self,
        supply_asset: str,
        borrow_asset: str,
        initial_amount: float,
        loops: int = 2,
        min_health_factor: float = 1.5,
        borrow_price: Optional[float] = None,
    ) -> LoopResult:
        """
        Supply `initial_amount` and loop borrow -> swap -> re-supply.

        Args:
            supply_asset: Collateral asset (e.g. WETH)
            borrow_asset: Asset to borrow (e.g. USDC)
            initial_amount: Collateral to supply first (supply_asset units)
            loops: Number of borrow iterations, 1-3
            min_health_factor: Floor the loop never breaches with its own borrow
            borrow_price: USD price of borrow_asset (stablecoins default to 1)
        """
        result = LoopResult(status=OutcomeStatus.SUCCESS)
        lev = self.constants.leverage

        supply = normalize_symbol(supply_asset)
        borrow = normalize_symbol(borrow_asset)
        price = self._price_or_none(borrow or borrow_asset, borrow_price)

        if not isinstance(loops, int) or not lev.min_loops <= loops <= lev.max_loops:
            error = f"loops must be between {lev.min_loops} and {lev.max_loops}, got {loops}"
        elif supply is None or borrow is None or is_native(supply) or is_native(borrow):
            error = f"Unsupported asset pair {supply_asset}/{borrow_asset}"
        elif supply == borrow:
            error = "Supply and borrow assets must differ"
        elif initial_amount <= 0:
            error = "initial_amount must be positive"
        elif min_health_factor <= 1.0:
            error = "min_health_factor must be above 1.0"
        elif price is None:
            error = f"borrow_price required for {borrow_asset}"
        else:
            error = ""
        if error:
            result.status = OutcomeStatus.ERROR
            result.error = error
            logger.warning("Leveraged open rejected: %s", error)
            return result

        logger.info(
            "Opening leveraged position: %.6f %s, borrow %s, %d loops, min HF %.2f",
            initial_amount,
            supply,
            borrow,
            loops,
            min_health_factor,
        )

        step = StepRecord(f"Supply {initial_amount} {supply}", StepStatus.COMPLETE)
        supplied = await guarded("supply", self.gateway.supply(supply, initial_amount))
        if not supplied.success:
            return self._fail(result, step, supplied.error)
        step.tx_ref = supplied.tx_ref
        result.steps.append(step)

        for i in range(loops):
            try:
                health = await self._health()
            except Exception as e:
                return self._fail(result, StepRecord(f"Loop {i + 1} health check", StepStatus.FAILED), str(e))

            if i > 0 and health.health_factor < min_health_factor:
                result.steps.append(
                    StepRecord(
                        f"Loop {i + 1} skipped",
                        StepStatus.SKIPPED,
                        details={
                            "reason": "Health factor too low",
                            "health_factor": health.health_factor,
                            "min_health_factor": min_health_factor,
                        },
                    )
                )
                break

            if health.available_borrows_usd < lev.min_borrow_usd:
                result.steps.append(
                    StepRecord(
                        f"Loop {i + 1} skipped",
                        StepStatus.SKIPPED,
                        details={"reason": "No borrowing capacity"},
                    )
                )
                break

            borrow_usd = min(
                health.available_borrows_usd * lev.borrow_fraction,
                self.max_borrow_usd(health, min_health_factor),
            )
            if borrow_usd < lev.min_borrow_usd:
                result.steps.append(
                    StepRecord(
                        f"Loop {i + 1} skipped",
                        StepStatus.SKIPPED,
                        details={"reason": "Borrow would breach minimum health factor"},
                    )
                )
                break

            borrow_amount = borrow_usd / price
            step = StepRecord(f"Borrow {borrow_amount:.6f} {borrow}", StepStatus.COMPLETE)
            borrowed = await guarded("borrow", self.gateway.borrow(borrow, borrow_amount))
            if not borrowed.success:
                return self._fail(result, step, borrowed.error)
            step.tx_ref = borrowed.tx_ref
            step.details["usd"] = borrow_usd
            result.steps.append(step)

            step = StepRecord(f"Swap {borrow} -> {supply}", StepStatus.COMPLETE)
            swap = await self.swaps.swap_tokens(borrow, supply, borrow_amount)
            if not swap.success:
                return self._fail(result, step, swap.error)
            step.tx_ref = swap.tx_ref
            step.details["amount_out"] = swap.amount_out
            result.steps.append(step)

            step = StepRecord(f"Supply {swap.amount_out:.6f} {supply}", StepStatus.COMPLETE)
            resupplied = await guarded("supply", self.gateway.supply(supply, swap.amount_out))
            if not resupplied.success:
                return self._fail(result, step, resupplied.error)
            step.tx_ref = resupplied.tx_ref
            result.steps.append(step)

        try:
            final = await self._health()
        except Exception as e:
            result.status = OutcomeStatus.ERROR
            result.error = f"Final health read failed: {e}"
            return result

        logger.info(
            "Leveraged position open: collateral $%.2f, debt $%.2f, HF %.3f",
            final.total_collateral_usd,
            final.total_debt_usd,
            final.health_factor,
        )
        return self._finish(result, final)

    # ------------------------------------------------------------------
    # Close
    # ------------------------------------------------------------------

    async def close_position(
        self,
        supply_asset: str,
        debt_asset: str,
        max_iterations: Optional[int] = None,
        min_health_factor: float = 1.2,
        supply_price: Optional[float] = None,
    ) -> LoopResult:
        """
        Unwind: withdraw excess collateral, swap to the debt asset, repay.

        Stops with success once the debt is negligible. Each withdrawal is
        close_withdraw_fraction of collateral above debt_buffer_multiple x
        debt, capped to keep the health factor >= min_health_factor.
        """
        result = LoopResult(status=OutcomeStatus.SUCCESS)
        lev = self.constants.leverage
        iterations = lev.max_close_iterations if max_iterations is None else max_iterations

        supply = normalize_symbol(supply_asset)
        debt = normalize_symbol(debt_asset)
        price = self._price_or_none(supply or supply_asset, supply_price)

        if not isinstance(iterations, int) or not 1 <= iterations <= lev.max_close_iterations:
            error = f"max_iterations must be between 1 and {lev.max_close_iterations}, got {iterations}"
        elif supply is None or debt is None or is_native(supply) or is_native(debt):
            error = f"Unsupported asset pair {supply_asset}/{debt_asset}"
        elif supply == debt:
            error = "Supply and debt assets must differ"
        elif min_health_factor <= 1.0:
            error = "min_health_factor must be above 1.0"
        elif price is None:
            error = f"supply_price required for {supply_asset}"
        else:
            error = ""
        if error:
            result.status = OutcomeStatus.ERROR
            result.error = error
            logger.warning("Leveraged close rejected: %s", error)
            return result

        logger.info("Closing leveraged position: %s collateral, %s debt", supply, debt)

        repaid_any = False
        for i in range(iterations):
            try:
                health = await self._health()
            except Exception as e:
                return self._fail(result, StepRecord(f"Iteration {i + 1} health check", StepStatus.FAILED), str(e))

            if health.total_debt_usd < lev.negligible_debt_usd:
                result.steps.append(StepRecord("Debt fully repaid", StepStatus.COMPLETE))
                repaid_any = True
                break

            excess = health.total_collateral_usd - lev.debt_buffer_multiple * health.total_debt_usd
            withdraw_usd = min(
                excess * lev.close_withdraw_fraction,
                self.max_withdraw_usd(health, min_health_factor),
            )
            if withdraw_usd <= 0:
                result.steps.append(
                    StepRecord(
                        f"Iteration {i + 1} skipped",
                        StepStatus.SKIPPED,
                        details={"reason": "Not enough excess collateral"},
                    )
                )
                break

            amount = withdraw_usd / price
            step = StepRecord(f"Withdraw {amount:.6f} {supply}", StepStatus.COMPLETE)
            withdrawn = await guarded("withdraw", self.gateway.withdraw(supply, amount))
            if not withdrawn.success:
                return self._fail(result, step, withdrawn.error)
            step.tx_ref = withdrawn.tx_ref
            result.steps.append(step)

            step = StepRecord(f"Swap {supply} -> {debt}", StepStatus.COMPLETE)
            swap = await self.swaps.swap_tokens(supply, debt, withdrawn.amount or amount)
            if not swap.success:
                return self._fail(result, step, swap.error)
            step.tx_ref = swap.tx_ref
            step.details["amount_out"] = swap.amount_out
            result.steps.append(step)

            step = StepRecord(f"Repay {debt} debt", StepStatus.COMPLETE)
            repaid = await guarded("repay", self.gateway.repay(debt, swap.amount_out))
            if not repaid.success:
                return self._fail(result, step, repaid.error)
            step.tx_ref = repaid.tx_ref
            step.details["amount"] = repaid.amount
            result.steps.append(step)
            repaid_any = True

        try:
            final = await self._health()
        except Exception as e:
            result.status = OutcomeStatus.ERROR
            result.error = f"Final health read failed: {e}"
            return result

        if not repaid_any:
            result.status = OutcomeStatus.SKIPPED
            result.error = "Nothing could be repaid"

        logger.info(
            "Leveraged close finished: debt $%.2f remaining, HF %.3f",
            final.total_debt_usd,
            final.health_factor,
        )
        return self._finish(result, final)
