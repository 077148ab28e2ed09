"""
Quote/Execution Gateway

The only path to the chain. Each method performs one on-chain action (or
one read) and returns a TxResult; failures come back as success=False or
as a raised GatewayError, and callers handle both at the call site.

PaperGateway is an in-memory lending market + swap venue used for paper
trading and tests.
"""

import logging
import math
import uuid
from typing import Awaitable, Dict, List, Optional, Union

from .models import AccountHealth, Quote, TxResult
from .tokens import NATIVE_SYMBOL, WRAPPED_NATIVE_SYMBOL, normalize_symbol

logger = logging.getLogger("yield_trader.gateway")

ALL = "all"

Amount = Union[float, str]


class GatewayError(Exception):
    """Transport or venue failure raised by a gateway call."""


class Gateway:
    """
    Base gateway. Concrete venues implement every coroutine.

    Amounts are human token units. `withdraw` and `repay` accept ALL.
    Variable rate (mode 2) is the default for borrow/repay.
    """

    async def swap(
        self, token_in: str, token_out: str, amount: float, slippage_percent: float
    ) -> TxResult:
        raise NotImplementedError

    async def quote(self, token_in: str, token_out: str, amount: float) -> Quote:
        """Expected output of a swap between two non-native tokens."""
        raise NotImplementedError

    async def wrap_native(self, amount: float) -> TxResult:
        raise NotImplementedError

    async def unwrap_wrapped(self, amount: float) -> TxResult:
        raise NotImplementedError

    async def supply(self, asset: str, amount: float) -> TxResult:
        raise NotImplementedError

    async def withdraw(self, asset: str, amount: Amount) -> TxResult:
        raise NotImplementedError

    async def borrow(self, asset: str, amount: float, rate_mode: int = 2) -> TxResult:
        raise NotImplementedError

    async def repay(self, asset: str, amount: Amount, rate_mode: int = 2) -> TxResult:
        raise NotImplementedError

    async def get_account_health(self) -> AccountHealth:
        raise NotImplementedError

    async def get_balance(self, asset: str) -> float:
        """Wallet balance (not supplied) of an asset."""
        raise NotImplementedError

    async def get_supplied(self, asset: str) -> float:
        """Amount of an asset currently supplied to the venue, interest included."""
        raise NotImplementedError

    async def wait_for_transaction(self, tx_ref: str, confirmations: int = 1) -> bool:
        raise NotImplementedError


async def guarded(label: str, call: Awaitable[TxResult]) -> TxResult:
    """Await a gateway call, turning a raised failure into a failed TxResult."""
    try:
        return await call
    except Exception as e:
        logger.error("%s failed: %s", label, e)
        return TxResult.failed(str(e) or type(e).__name__)


class PaperGateway(Gateway):
    """
    Simulated lending market with a constant-price swap venue.

    - Collateral and debt are valued at `prices` (USD)
    - Borrow capacity = collateral * ltv - debt
    - Health factor = collateral * liquidation_threshold / debt (inf without debt)
    - Swaps convert at the price ratio minus `swap_fee_percent`

    `fail_operations` maps an operation name ("swap", "supply", ...) to an
    error message; that operation then raises GatewayError.
    """

    def __init__(
        self,
        balances: Optional[Dict[str, float]] = None,
        prices: Optional[Dict[str, float]] = None,
        ltv: float = 0.80,
        liquidation_threshold: float = 0.85,
        swap_fee_percent: float = 0.3,
        gas_estimate_eth: float = 0.0002,
    ):
        self.balances: Dict[str, float] = {}
        for symbol, amount in (balances or {}).items():
            self.balances[self._symbol(symbol)] = amount

        self.prices: Dict[str, float] = {"ETH": 3000.0, "WETH": 3000.0, "USDC": 1.0, "DAI": 1.0}
        for symbol, price in (prices or {}).items():
            self.prices[self._symbol(symbol)] = price

        self.supplied: Dict[str, float] = {}
        self.debt: Dict[str, float] = {}
        self.ltv = ltv
        self.liquidation_threshold = liquidation_threshold
        self.swap_fee_percent = swap_fee_percent
        self.gas_estimate_eth = gas_estimate_eth

        self.fail_operations: Dict[str, str] = {}
        self.transactions: List[Dict] = []

        logger.info(
            "PaperGateway initialized: ltv=%.2f, liq_threshold=%.2f, fee=%.2f%%",
            ltv,
            liquidation_threshold,
            swap_fee_percent,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _symbol(asset: str) -> str:
        return normalize_symbol(asset) or asset

    def _price(self, asset: str) -> float:
        symbol = self._symbol(asset)
        if symbol not in self.prices:
            raise GatewayError(f"No price for {symbol}")
        return self.prices[symbol]

    def _check_failure(self, operation: str) -> None:
        if operation in self.fail_operations:
            raise GatewayError(self.fail_operations[operation])

    def _record(self, operation: str, asset: str, amount: float, **extra) -> TxResult:
        tx_ref = f"paper-{uuid.uuid4().hex}"
        self.transactions.append(
            {"op": operation, "asset": asset, "amount": amount, "tx_ref": tx_ref, **extra}
        )
        logger.debug("%s %s %.8f -> %s", operation, asset, amount, tx_ref)
        return TxResult(success=True, tx_ref=tx_ref, amount=amount)

    def _credit(self, asset: str, amount: float) -> None:
        self.balances[asset] = self.balances.get(asset, 0.0) + amount

    def _debit(self, asset: str, amount: float) -> bool:
        held = self.balances.get(asset, 0.0)
        if amount > held + 1e-12:
            return False
        self.balances[asset] = max(0.0, held - amount)
        return True

    def _collateral_usd(self) -> float:
        return sum(amount * self._price(a) for a, amount in self.supplied.items())

    def _debt_usd(self) -> float:
        return sum(amount * self._price(a) for a, amount in self.debt.items())

    def _health_factor(self, collateral_usd: float, debt_usd: float) -> float:
        if debt_usd <= 0:
            return math.inf
        return collateral_usd * self.liquidation_threshold / debt_usd

    def set_price(self, asset: str, price: float) -> None:
        self.prices[self._symbol(asset)] = price
        if self._symbol(asset) == NATIVE_SYMBOL:
            self.prices[WRAPPED_NATIVE_SYMBOL] = price

    def accrue_interest(self, asset: str, apy_percent: float, days: float) -> float:
        """Grow a supplied balance by simple interest; returns the interest added."""
        symbol = self._symbol(asset)
        principal = self.supplied.get(symbol, 0.0)
        interest = principal * apy_percent / 100 * days / 365
        self.supplied[symbol] = principal + interest
        return interest

    # ------------------------------------------------------------------
    # Gateway
    # ------------------------------------------------------------------

    async def swap(
        self, token_in: str, token_out: str, amount: float, slippage_percent: float
    ) -> TxResult:
        self._check_failure("swap")
        token_in, token_out = self._symbol(token_in), self._symbol(token_out)
        if NATIVE_SYMBOL in (token_in, token_out):
            return TxResult.failed("Native coin cannot be routed; wrap or unwrap first")
        if amount <= 0:
            return TxResult.failed("Swap amount must be positive")
        rate = self._price(token_in) / self._price(token_out)
        if not self._debit(token_in, amount):
            return TxResult.failed(f"Insufficient {token_in} balance")

        amount_out = amount * rate * (1 - self.swap_fee_percent / 100)
        self._credit(token_out, amount_out)
        result = self._record("swap", token_in, amount, token_out=token_out, amount_out=amount_out)
        result.amount = amount_out
        return result

    async def quote(self, token_in: str, token_out: str, amount: float) -> Quote:
        self._check_failure("quote")
        token_in, token_out = self._symbol(token_in), self._symbol(token_out)
        if NATIVE_SYMBOL in (token_in, token_out):
            raise GatewayError("Native coin cannot be quoted; use the wrapped asset")
        rate = self._price(token_in) / self._price(token_out)
        return Quote(
            amount_out=amount * rate * (1 - self.swap_fee_percent / 100),
            price_impact_percent=self.swap_fee_percent,
            gas_estimate_eth=self.gas_estimate_eth,
        )

    async def wrap_native(self, amount: float) -> TxResult:
        self._check_failure("wrap")
        if not self._debit(NATIVE_SYMBOL, amount):
            return TxResult.failed("Insufficient ETH balance")
        self._credit(WRAPPED_NATIVE_SYMBOL, amount)
        return self._record("wrap", NATIVE_SYMBOL, amount)

    async def unwrap_wrapped(self, amount: float) -> TxResult:
        self._check_failure("unwrap")
        if not self._debit(WRAPPED_NATIVE_SYMBOL, amount):
            return TxResult.failed("Insufficient WETH balance")
        self._credit(NATIVE_SYMBOL, amount)
        return self._record("unwrap", WRAPPED_NATIVE_SYMBOL, amount)

    async def supply(self, asset: str, amount: float) -> TxResult:
        self._check_failure("supply")
        symbol = self._symbol(asset)
        if symbol == NATIVE_SYMBOL:
            return TxResult.failed("Supply the wrapped asset, not the native coin")
        if amount <= 0:
            return TxResult.failed("Supply amount must be positive")
        if not self._debit(symbol, amount):
            return TxResult.failed(f"Insufficient {symbol} balance")
        self.supplied[symbol] = self.supplied.get(symbol, 0.0) + amount
        return self._record("supply", symbol, amount)

    async def withdraw(self, asset: str, amount: Amount) -> TxResult:
        self._check_failure("withdraw")
        symbol = self._symbol(asset)
        held = self.supplied.get(symbol, 0.0)
        if held <= 0:
            return TxResult.failed(f"Nothing supplied for {symbol}")

        to_withdraw = held if amount == ALL else min(float(amount), held)
        if to_withdraw <= 0:
            return TxResult.failed("Withdraw amount must be positive")

        collateral_after = self._collateral_usd() - to_withdraw * self._price(symbol)
        if self._health_factor(collateral_after, self._debt_usd()) < 1.0:
            return TxResult.failed("Withdrawal would drop health factor below 1")

        self.supplied[symbol] = held - to_withdraw
        if self.supplied[symbol] <= 1e-12:
            del self.supplied[symbol]
        self._credit(symbol, to_withdraw)
        return self._record("withdraw", symbol, to_withdraw)

    async def borrow(self, asset: str, amount: float, rate_mode: int = 2) -> TxResult:
        self._check_failure("borrow")
        symbol = self._symbol(asset)
        if amount <= 0:
            return TxResult.failed("Borrow amount must be positive")
        available = self._collateral_usd() * self.ltv - self._debt_usd()
        if amount * self._price(symbol) > available + 1e-9:
            return TxResult.failed("Borrow exceeds available capacity")
        self.debt[symbol] = self.debt.get(symbol, 0.0) + amount
        self._credit(symbol, amount)
        return self._record("borrow", symbol, amount, rate_mode=rate_mode)

    async def repay(self, asset: str, amount: Amount, rate_mode: int = 2) -> TxResult:
        self._check_failure("repay")
        symbol = self._symbol(asset)
        owed = self.debt.get(symbol, 0.0)
        if owed <= 0:
            return TxResult.failed(f"No {symbol} debt to repay")

        wanted = owed if amount == ALL else min(float(amount), owed)
        to_repay = min(wanted, self.balances.get(symbol, 0.0))
        if to_repay <= 0:
            return TxResult.failed(f"Insufficient {symbol} balance to repay")

        self._debit(symbol, to_repay)
        self.debt[symbol] = owed - to_repay
        if self.debt[symbol] <= 1e-12:
            del self.debt[symbol]
        return self._record("repay", symbol, to_repay, rate_mode=rate_mode)

    async def get_account_health(self) -> AccountHealth:
        self._check_failure("health")
        collateral = self._collateral_usd()
        debt = self._debt_usd()
        return AccountHealth(
            total_collateral_usd=collateral,
            total_debt_usd=debt,
            available_borrows_usd=max(0.0, collateral * self.ltv - debt),
            health_factor=self._health_factor(collateral, debt),
        )

    async def get_balance(self, asset: str) -> float:
        self._check_failure("balance")
        return self.balances.get(self._symbol(asset), 0.0)

    async def get_supplied(self, asset: str) -> float:
        self._check_failure("supplied")
        return self.supplied.get(self._symbol(asset), 0.0)

    async def wait_for_transaction(self, tx_ref: str, confirmations: int = 1) -> bool:
        self._check_failure("wait")
        return any(tx["tx_ref"] == tx_ref for tx in self.transactions)
