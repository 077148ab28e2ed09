"""
Pytest configuration and shared fixtures.

Author: khopilot
"""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from src.yield_trader import (  # noqa: E402
    InMemoryStore,
    Opportunity,
    PaperGateway,
    Position,
    RiskTier,
    StrategyConfig,
    TradingConstants,
)


@pytest.fixture
def constants():
    return TradingConstants()


@pytest.fixture
def strategy():
    """Default strategy with trading enabled."""
    return StrategyConfig(enabled=True)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def gateway():
    """Paper venue holding 1 ETH, ETH at $3000."""
    return PaperGateway(balances={"ETH": 1.0}, prices={"ETH": 3000.0, "WETH": 3000.0})


@pytest.fixture
def make_position():
    """Factory for positions with a fixed entry time."""
    counter = {"n": 0}

    def _make(asset="WETH", amount=1.0, price=100.0, apy=3.0, trailing_stop_percent=10.0, venue="Aave V3"):
        counter["n"] += 1
        entry_time = datetime(2025, 1, 1, tzinfo=timezone.utc) + timedelta(seconds=counter["n"])
        return Position.open(
            venue=venue,
            strategy=f"{asset} Supply",
            asset=asset,
            amount=amount,
            price=price,
            apy=apy,
            trailing_stop_percent=trailing_stop_percent,
            entry_time=entry_time,
        )

    return _make


@pytest.fixture
def make_opportunity():
    def _make(asset="USDC", apy=4.0, risk=RiskTier.LOW, venue="Aave V3"):
        return Opportunity(venue=venue, strategy=f"{asset} Supply", asset=asset, apy=apy, risk=risk)

    return _make
