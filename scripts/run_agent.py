#!/usr/bin/env python3
"""
Run the Yield Trader in paper mode.

Cycles run one at a time: each cycle is awaited before the next sleep.
Chain access is simulated by PaperGateway; prices and APYs come from
CoinGecko / DefiLlama unless --offline is given.

Usage:
    python scripts/run_agent.py --once                # single cycle
    python scripts/run_agent.py --dry-run             # analysis only
    python scripts/run_agent.py --interval 300        # every 5 minutes
    python scripts/run_agent.py --enable --mode conservative
    python scripts/run_agent.py --optimize            # one rebalance pass
    python scripts/run_agent.py --compound            # reinvest into the best yield
    python scripts/run_agent.py --report              # performance metrics
    python scripts/run_agent.py --emergency-withdraw  # exit everything, disable trading

Environment (.env is loaded):
    YIELD_TRADER_CONFIG      Config path (default: config.yaml)
    YIELD_TRADER_DATA_DIR    State directory (default: storage.data_dir)
    YIELD_TRADER_PAPER_ETH   Starting paper ETH balance (default: 1.0)
"""

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from pathlib import Path

from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from src.yield_trader import (  # noqa: E402
    CoinGeckoMarketData,
    DefiLlamaOpportunitySource,
    JsonFileStore,
    Opportunity,
    PaperGateway,
    StaticMarketData,
    StaticOpportunitySource,
    TradingConstants,
    TradingOrchestrator,
    load_config,
    setup_logging,
)

logger = logging.getLogger("yield_trader.runner")

OFFLINE_PRICES = {"ETH": 3000.0, "WETH": 3000.0, "USDC": 1.0, "DAI": 1.0}


def build_sources(config: dict, constants: TradingConstants, offline: bool):
    """Market data + opportunity source, live or static."""
    if offline:
        opportunities = [
            Opportunity(venue="Aave V3", strategy=f"{symbol} Supply", asset=symbol, apy=apy)
            for symbol, apy in constants.apy.fallbacks.items()
            if symbol in ("USDC", "WETH")
        ]
        return StaticMarketData(OFFLINE_PRICES), StaticOpportunitySource(opportunities)

    md_cfg = config.get("market_data", {}) or {}
    market_data = CoinGeckoMarketData(
        cache_ttl=md_cfg.get("cache_ttl_seconds", constants.apy.cache_ttl_seconds),
        timeout=md_cfg.get("timeout_seconds", 15),
        max_retries=md_cfg.get("max_retries", 3),
    )
    opportunity_source = DefiLlamaOpportunitySource(
        constants=constants,
        symbols=md_cfg.get("symbols"),
        timeout=md_cfg.get("timeout_seconds", 15),
        max_retries=md_cfg.get("max_retries", 3),
    )
    return market_data, opportunity_source


async def run_agent(args, config: dict) -> None:
    constants = TradingConstants.from_dict(config.get("constants"))
    market_data, opportunity_source = build_sources(config, constants, args.offline)

    data_dir = os.getenv(
        "YIELD_TRADER_DATA_DIR",
        (config.get("storage", {}) or {}).get("data_dir", "data"),
    )
    gateway = PaperGateway(balances={"ETH": float(os.getenv("YIELD_TRADER_PAPER_ETH", "1.0"))})

    orchestrator = TradingOrchestrator.from_config(
        config,
        gateway=gateway,
        market_data=market_data,
        opportunity_source=opportunity_source,
        store=JsonFileStore(data_dir),
    )

    if args.mode:
        orchestrator.set_mode(args.mode)
    if args.enable:
        orchestrator.enable()

    # Paper venue trades at market prices
    prices = await market_data.get_prices(["ETH", "USDC", "DAI"])
    for symbol, price in prices.items():
        gateway.set_price(symbol, price)

    try:
        if args.dry_run:
            result = await orchestrator.run_dry_run_cycle()
            print(json.dumps(result.to_dict(), indent=2, default=str))
        elif args.optimize:
            result = await orchestrator.optimize_positions()
            print(json.dumps(result.to_dict(), indent=2, default=str))
        elif args.compound:
            result = await orchestrator.compound_yield()
            print(json.dumps(result.to_dict(), indent=2, default=str))
        elif args.report:
            print(orchestrator.performance.format_metrics(orchestrator.get_performance_metrics()))
            print(json.dumps(orchestrator.get_portfolio_pnl(), indent=2))
        elif args.emergency_withdraw:
            actions = await orchestrator.emergency_withdraw()
            print(json.dumps([a.to_dict() for a in actions], indent=2, default=str))
        elif args.once:
            result = await orchestrator.run_cycle()
            print(json.dumps(result.to_dict(), indent=2, default=str))
            print(json.dumps(orchestrator.get_portfolio_pnl(), indent=2))
        else:
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, orchestrator.stop)

            interval = args.interval or (config.get("runner", {}) or {}).get("interval_seconds", 300)
            await orchestrator.run_forever(interval)
    finally:
        await orchestrator.close()


def main():
    load_dotenv(dotenv_path=PROJECT_ROOT / ".env")

    parser = argparse.ArgumentParser(description="Run the Yield Trader in paper mode")
    parser.add_argument(
        "--config",
        type=str,
        default=os.getenv("YIELD_TRADER_CONFIG", "config.yaml"),
        help="Path to configuration file",
    )
    parser.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    parser.add_argument("--dry-run", action="store_true", help="Analyse without trading")
    parser.add_argument("--optimize", action="store_true", help="Run one rebalance pass")
    parser.add_argument("--compound", action="store_true", help="Reinvest positions into the best yield")
    parser.add_argument("--report", action="store_true", help="Print performance metrics")
    parser.add_argument(
        "--emergency-withdraw",
        action="store_true",
        help="Withdraw every position and disable trading",
    )
    parser.add_argument("--interval", type=float, help="Seconds between cycles")
    parser.add_argument("--enable", action="store_true", help="Enable autonomous trading")
    parser.add_argument(
        "--mode",
        choices=["conservative", "aggressive", "capitulation-fishing"],
        help="Apply a strategy preset",
    )
    parser.add_argument("--offline", action="store_true", help="Static prices and APYs, no network")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    args = parser.parse_args()

    config = load_config(args.config)
    setup_logging(config, debug=args.debug)

    logger.info("Yield Trader starting (paper mode)")
    asyncio.run(run_agent(args, config))


if __name__ == "__main__":
    main()
