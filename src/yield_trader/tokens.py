"""
Token Registry

Supported assets on Base: the native coin, its wrapped form, and the
ERC-20s the lending venue accepts.
"""

from dataclasses import dataclass
from typing import Dict, Optional


@dataclass(frozen=True)
class TokenInfo:
    symbol: str
    name: str
    decimals: int
    is_stablecoin: bool = False
    is_native: bool = False


NATIVE_SYMBOL = "ETH"
WRAPPED_NATIVE_SYMBOL = "WETH"

TOKENS: Dict[str, TokenInfo] = {
    "ETH": TokenInfo("ETH", "Ether", 18, is_native=True),
    "WETH": TokenInfo("WETH", "Wrapped Ether", 18),
    "USDC": TokenInfo("USDC", "USD Coin", 6, is_stablecoin=True),
    "DAI": TokenInfo("DAI", "Dai Stablecoin", 18, is_stablecoin=True),
    "cbETH": TokenInfo("cbETH", "Coinbase Wrapped Staked ETH", 18),
}

# Redeploy fallback: the asset that is swapped into the target when the
# target itself is not held.
SIBLINGS: Dict[str, str] = {
    "USDC": "WETH",
    "WETH": "USDC",
}

_BY_UPPER = {symbol.upper(): symbol for symbol in TOKENS}


def normalize_symbol(symbol: str) -> Optional[str]:
    """Canonical registry symbol, or None when unsupported."""
    if not symbol:
        return None
    return _BY_UPPER.get(symbol.upper())


def get_token(symbol: str) -> Optional[TokenInfo]:
    canonical = normalize_symbol(symbol)
    return TOKENS[canonical] if canonical else None


def is_native(symbol: str) -> bool:
    return normalize_symbol(symbol) == NATIVE_SYMBOL


def is_stablecoin(symbol: str) -> bool:
    token = get_token(symbol)
    return bool(token and token.is_stablecoin)


def sibling_of(symbol: str) -> Optional[str]:
    canonical = normalize_symbol(symbol)
    return SIBLINGS.get(canonical) if canonical else None
