"""
Swap Primitives

Routes a token conversion through the gateway:

    ETH  -> WETH   wrap
    WETH -> ETH    unwrap
    ETH  -> X      wrap, then swap WETH -> X
    X    -> ETH    swap X -> WETH, then unwrap
    X    -> Y      direct swap

Validation (supported tokens, positive amount, slippage bounds) happens
before any gateway call.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .config import TradingConstants
from .gateway import Gateway, guarded
from .models import OutcomeStatus, TxResult
from .tokens import (
    NATIVE_SYMBOL,
    WRAPPED_NATIVE_SYMBOL,
    is_native,
    normalize_symbol,
)

logger = logging.getLogger("yield_trader.swaps")


@dataclass
class SwapOutcome:
    """Result of swap_tokens. tx_ref is the last on-chain step."""

    success: bool
    token_in: str
    token_out: str
    amount_in: float
    amount_out: float = 0.0
    tx_ref: Optional[str] = None
    tx_refs: List[str] = field(default_factory=list)
    error: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "token_in": self.token_in,
            "token_out": self.token_out,
            "amount_in": self.amount_in,
            "amount_out": self.amount_out,
            "tx_ref": self.tx_ref,
            "tx_refs": list(self.tx_refs),
            "error": self.error,
        }


@dataclass
class SwapQuote:
    """Expected result of swap_tokens; nothing is executed."""

    success: bool
    token_in: str
    token_out: str
    amount_in: float
    amount_out: float = 0.0
    min_amount_out: float = 0.0
    price_impact_percent: float = 0.0
    gas_estimate_eth: float = 0.0
    route: str = ""
    error: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "token_in": self.token_in,
            "token_out": self.token_out,
            "amount_in": self.amount_in,
            "amount_out": self.amount_out,
            "min_amount_out": self.min_amount_out,
            "price_impact_percent": self.price_impact_percent,
            "gas_estimate_eth": self.gas_estimate_eth,
            "route": self.route,
            "error": self.error,
        }


@dataclass
class SwapAndSupplyResult:
    status: OutcomeStatus
    swap: Optional[SwapOutcome] = None
    supply_tx_ref: Optional[str] = None
    amount_supplied: float = 0.0
    error: str = ""

    @property
    def success(self) -> bool:
        return self.status == OutcomeStatus.SUCCESS


class SwapRouter:
    """Five-case swap router over a Gateway."""

    def __init__(self, gateway: Gateway, constants: Optional[TradingConstants] = None):
        self.gateway = gateway
        self.constants = constants or TradingConstants()

    def _resolve_slippage(self, slippage_percent: Optional[float]) -> float:
        limits = self.constants.slippage
        if slippage_percent is None:
            return limits.default_percent
        if slippage_percent < 0:
            raise ValueError(f"Slippage must be non-negative, got {slippage_percent}")
        return min(slippage_percent, limits.max_percent)

    async def swap_tokens(
        self,
        token_in: str,
        token_out: str,
        amount: float,
        slippage_percent: Optional[float] = None,
    ) -> SwapOutcome:
        """
        Convert `amount` of token_in into token_out.

        Args:
            token_in: Source symbol (ETH, WETH, USDC, ...)
            token_out: Destination symbol
            amount: Human units of token_in
            slippage_percent: Defaults to slippage.default_percent,
                capped at slippage.max_percent

        Returns:
            SwapOutcome (never raises for gateway failures)
        """
        src = normalize_symbol(token_in)
        dst = normalize_symbol(token_out)
        outcome = SwapOutcome(
            success=False,
            token_in=src or token_in,
            token_out=dst or token_out,
            amount_in=amount,
        )

        if src is None or dst is None:
            outcome.error = f"Unsupported token pair {token_in}->{token_out}"
            return outcome
        if src == dst:
            outcome.error = "token_in and token_out are the same"
            return outcome
        if amount <= 0:
            outcome.error = "Amount must be positive"
            return outcome
        try:
            slippage = self._resolve_slippage(slippage_percent)
        except ValueError as e:
            outcome.error = str(e)
            return outcome

        logger.info("Swap %.8f %s -> %s (slippage %.2f%%)", amount, src, dst, slippage)

        # Case 1: ETH -> WETH
        if src == NATIVE_SYMBOL and dst == WRAPPED_NATIVE_SYMBOL:
            result = await guarded("wrap", self.gateway.wrap_native(amount))
            return self._finish(outcome, [result])

        # Case 2: WETH -> ETH
        if src == WRAPPED_NATIVE_SYMBOL and dst == NATIVE_SYMBOL:
            result = await guarded("unwrap", self.gateway.unwrap_wrapped(amount))
            return self._finish(outcome, [result])

        # Case 3: ETH -> X
        if is_native(src):
            wrapped = await guarded("wrap", self.gateway.wrap_native(amount))
            if not wrapped.success:
                return self._finish(outcome, [wrapped])
            swapped = await guarded(
                "swap", self.gateway.swap(WRAPPED_NATIVE_SYMBOL, dst, amount, slippage)
            )
            return self._finish(outcome, [wrapped, swapped])

        # Case 4: X -> ETH
        if is_native(dst):
            swapped = await guarded(
                "swap", self.gateway.swap(src, WRAPPED_NATIVE_SYMBOL, amount, slippage)
            )
            if not swapped.success:
                return self._finish(outcome, [swapped])
            unwrapped = await guarded("unwrap", self.gateway.unwrap_wrapped(swapped.amount))
            return self._finish(outcome, [swapped, unwrapped])

        # Case 5: X -> Y
        swapped = await guarded("swap", self.gateway.swap(src, dst, amount, slippage))
        return self._finish(outcome, [swapped])

    async def get_swap_quote(
        self,
        token_in: str,
        token_out: str,
        amount: float,
        slippage_percent: Optional[float] = None,
    ) -> SwapQuote:
        """
        Quote what swap_tokens would return, routed the same way.

        Wrapping and unwrapping are 1:1, so only the venue leg between
        two non-native tokens is quoted by the gateway.

        Returns:
            SwapQuote (never raises for gateway failures)
        """
        src = normalize_symbol(token_in)
        dst = normalize_symbol(token_out)
        quote = SwapQuote(
            success=False,
            token_in=src or token_in,
            token_out=dst or token_out,
            amount_in=amount,
        )

        if src is None or dst is None:
            quote.error = f"Unsupported token: {token_in if src is None else token_out}"
            return quote
        if src == dst:
            quote.error = "token_in and token_out are the same"
            return quote
        if amount <= 0:
            quote.error = "Amount must be positive"
            return quote
        try:
            slippage = self._resolve_slippage(slippage_percent)
        except ValueError as e:
            quote.error = str(e)
            return quote

        venue_in = WRAPPED_NATIVE_SYMBOL if is_native(src) else src
        venue_out = WRAPPED_NATIVE_SYMBOL if is_native(dst) else dst
        legs = [src]
        if venue_in != src:
            legs.append(venue_in)
        if venue_out != venue_in:
            legs.append(venue_out)
        if dst != venue_out:
            legs.append(dst)
        quote.route = " -> ".join(legs)

        if venue_in == venue_out:
            quote.amount_out = amount
        else:
            try:
                venue_quote = await self.gateway.quote(venue_in, venue_out, amount)
            except Exception as e:
                logger.warning("Quote %s -> %s failed: %s", venue_in, venue_out, e)
                quote.error = str(e) or type(e).__name__
                return quote
            quote.amount_out = venue_quote.amount_out
            quote.price_impact_percent = venue_quote.price_impact_percent
            quote.gas_estimate_eth = venue_quote.gas_estimate_eth

        quote.min_amount_out = quote.amount_out * (1 - slippage / 100)
        quote.success = True
        return quote

    @staticmethod
    def _finish(outcome: SwapOutcome, steps: List[TxResult]) -> SwapOutcome:
        outcome.tx_refs = [s.tx_ref for s in steps if s.tx_ref]
        last = steps[-1]
        if last.success:
            outcome.success = True
            outcome.amount_out = last.amount
            outcome.tx_ref = last.tx_ref
            logger.info(
                "Swap complete: %.8f %s -> %.8f %s",
                outcome.amount_in,
                outcome.token_in,
                outcome.amount_out,
                outcome.token_out,
            )
        else:
            outcome.error = last.error
            logger.warning(
                "Swap %s -> %s failed: %s", outcome.token_in, outcome.token_out, last.error
            )
        return outcome

    async def swap_and_supply(
        self,
        token_in: str,
        token_out: str,
        amount: float,
        slippage_percent: Optional[float] = None,
    ) -> SwapAndSupplyResult:
        """Swap into token_out and supply the proceeds to the lending venue."""
        dst = normalize_symbol(token_out)
        if dst is None:
            return SwapAndSupplyResult(
                status=OutcomeStatus.ERROR, error=f"Unsupported token {token_out}"
            )
        if is_native(dst):
            return SwapAndSupplyResult(
                status=OutcomeStatus.ERROR, error="Native coin cannot be supplied; use WETH"
            )

        swap = None
        to_supply = amount
        if normalize_symbol(token_in) != dst:
            swap = await self.swap_tokens(token_in, dst, amount, slippage_percent)
            if not swap.success:
                return SwapAndSupplyResult(
                    status=OutcomeStatus.ERROR, swap=swap, error=f"Swap failed: {swap.error}"
                )
            to_supply = swap.amount_out
        elif amount <= 0:
            return SwapAndSupplyResult(status=OutcomeStatus.ERROR, error="Amount must be positive")

        supplied = await guarded("supply", self.gateway.supply(dst, to_supply))
        if not supplied.success:
            return SwapAndSupplyResult(
                status=OutcomeStatus.ERROR, swap=swap, error=f"Supply failed: {supplied.error}"
            )

        logger.info("Supplied %.8f %s", to_supply, dst)
        return SwapAndSupplyResult(
            status=OutcomeStatus.SUCCESS,
            swap=swap,
            supply_tx_ref=supplied.tx_ref,
            amount_supplied=to_supply,
        )
