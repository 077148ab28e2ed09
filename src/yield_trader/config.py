"""
Configuration for the Yield Trader

- StrategyConfig: policy parameters, mutable through explicit update calls
- Mode presets (conservative / aggressive / capitulation-fishing)
- TradingConstants: every tunable number used by the decision and
  execution code (dust thresholds, gas reserve, fractions, cooldowns)
- YAML loading and logging setup

Author: khopilot
"""

import copy
import logging
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .models import RiskTier

logger = logging.getLogger("yield_trader.config")

DEFAULT_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class ConfigError(ValueError):
    """Invalid configuration. Raised before any I/O is attempted."""


# =============================================================================
# STRATEGY CONFIG
# =============================================================================

PERCENT_FIELDS = (
    "take_profit_percent",
    "stop_loss_percent",
    "min_apy_threshold",
    "rebalance_threshold",
)

MODE_PRESETS: Dict[str, Dict[str, float]] = {
    # Tight exits, only solid yields, small size
    "conservative": {
        "take_profit_percent": 5.0,
        "stop_loss_percent": 2.0,
        "min_apy_threshold": 3.0,
        "rebalance_threshold": 3.0,
        "max_position_size_eth": 0.5,
    },
    # Let winners run, accept thin yields, bigger size
    "aggressive": {
        "take_profit_percent": 20.0,
        "stop_loss_percent": 10.0,
        "min_apy_threshold": 1.0,
        "rebalance_threshold": 1.5,
        "max_position_size_eth": 2.0,
    },
    # Enter anything after a crash, hold through deep drawdowns
    "capitulation-fishing": {
        "take_profit_percent": 30.0,
        "stop_loss_percent": 15.0,
        "min_apy_threshold": 0.5,
        "rebalance_threshold": 5.0,
        "max_position_size_eth": 1.0,
    },
}


@dataclass
class StrategyConfig:
    """Policy parameters. Autonomous trading is disabled by default."""

    take_profit_percent: float = 10.0
    stop_loss_percent: float = 5.0
    min_apy_threshold: float = 2.0
    rebalance_threshold: float = 3.0
    max_position_size_eth: float = 1.0
    enabled: bool = False
    mode: Optional[str] = None

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        for name in PERCENT_FIELDS:
            value = getattr(self, name)
            if value < 0:
                raise ConfigError(f"{name} must be non-negative, got {value}")
        if self.max_position_size_eth < 0:
            raise ConfigError(
                f"max_position_size_eth must be non-negative, got {self.max_position_size_eth}"
            )
        if self.mode is not None and self.mode not in MODE_PRESETS:
            raise ConfigError(f"Unknown mode: {self.mode}")

    def update(self, updates: Dict[str, Any]) -> "StrategyConfig":
        """
        Apply a partial update atomically.

        The candidate is validated in full before any field of self changes,
        so a bad value leaves the config untouched.
        """
        known = {f.name for f in fields(self)}
        unknown = set(updates) - known
        if unknown:
            raise ConfigError(f"Unknown strategy fields: {sorted(unknown)}")

        candidate = StrategyConfig(**{**self.to_dict(), **updates})
        for f in fields(self):
            setattr(self, f.name, getattr(candidate, f.name))

        logger.info("Trading strategy updated: %s", self.to_dict())
        return self

    def apply_mode(self, mode: str) -> "StrategyConfig":
        """Overwrite the numeric fields with a named preset bundle."""
        if mode not in MODE_PRESETS:
            raise ConfigError(
                f"Invalid mode {mode!r}. Valid: {', '.join(MODE_PRESETS)}"
            )
        return self.update({**MODE_PRESETS[mode], "mode": mode})

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_config(cls, config: dict) -> "StrategyConfig":
        """Create from config dictionary (the `strategy:` YAML section)."""
        strat = dict(config.get("strategy", {}) or {})
        mode = strat.pop("mode", None)

        known = {f.name for f in fields(cls)}
        unknown = set(strat) - known
        if unknown:
            raise ConfigError(f"Unknown strategy fields: {sorted(unknown)}")

        instance = cls(**strat)
        if mode:
            instance.apply_mode(mode)
        return instance


# =============================================================================
# TRADING CONSTANTS
# =============================================================================

# Risk tiers admitted by each rebalance.risk_tolerance setting
RISK_TOLERANCE_TIERS = {
    "conservative": (RiskTier.LOW,),
    "moderate": (RiskTier.LOW, RiskTier.MEDIUM),
    "aggressive": (RiskTier.LOW, RiskTier.MEDIUM, RiskTier.HIGH),
}

@dataclass
class GasConstants:
    reserve_eth: float = 0.01  # native kept back for gas
    cost_estimate_usd: float = 0.5  # assumed cost of a rebalance


@dataclass
class DustConstants:
    # Minimum balance (token units) worth acting on, per asset
    thresholds: Dict[str, float] = field(
        default_factory=lambda: {"USDC": 1.0, "WETH": 0.0001, "ETH": 0.02}
    )
    default: float = 0.0

    def threshold_for(self, asset: str) -> float:
        return self.thresholds.get(asset.upper(), self.thresholds.get(asset, self.default))


@dataclass
class SlippageConstants:
    default_percent: float = 1.0
    max_percent: float = 3.0


@dataclass
class RebalanceConstants:
    break_even_days: float = 7.0
    top_opportunities: int = 3
    interval_seconds: float = 3600.0
    reference_notional_usd: float = 1000.0
    risk_tolerance: str = "moderate"
    clear_on_failed_withdrawal: bool = False
    confirmations: int = 1
    compound_min_value_usd: float = 1.0


@dataclass
class ApyConstants:
    cache_ttl_seconds: float = 120.0
    fallbacks: Dict[str, float] = field(
        default_factory=lambda: {"USDC": 3.5, "WETH": 1.8, "DAI": 3.0, "cbETH": 2.5}
    )


@dataclass
class EntryConstants:
    default_size_eth: float = 0.1


@dataclass
class ConfidenceConstants:
    market_skip_threshold: float = 70.0


@dataclass
class StopLossConstants:
    bearish_tightening_percent: float = 30.0


@dataclass
class TrailingStopConstants:
    default_percent: float = 10.0


@dataclass
class HistoryConstants:
    max_actions: int = 100
    max_closed_trades: int = 500


@dataclass
class LeverageConstants:
    borrow_fraction: float = 0.5
    min_borrow_usd: float = 1.0
    min_loops: int = 1
    max_loops: int = 3
    debt_buffer_multiple: float = 1.2
    close_withdraw_fraction: float = 0.8
    max_close_iterations: int = 5
    negligible_debt_usd: float = 0.01
    # Used to project health factor when the account carries no debt yet
    assumed_liquidation_threshold: float = 0.8


@dataclass
class AccrualConstants:
    # Supplied-balance growth above this between two refreshes is treated
    # as an outside deposit, not interest
    max_refresh_growth_percent: float = 5.0


@dataclass
class DcaConstants:
    default_interval_seconds: float = 86400.0
    max_slices: int = 50
    max_execution_history: int = 200


@dataclass
class PerformanceConstants:
    max_equity_snapshots: int = 365
    annualization_days: float = 365.0


@dataclass
class TradingConstants:
    """All tunable numbers, grouped by concern."""

    gas: GasConstants = field(default_factory=GasConstants)
    dust: DustConstants = field(default_factory=DustConstants)
    slippage: SlippageConstants = field(default_factory=SlippageConstants)
    rebalance: RebalanceConstants = field(default_factory=RebalanceConstants)
    apy: ApyConstants = field(default_factory=ApyConstants)
    entry: EntryConstants = field(default_factory=EntryConstants)
    confidence: ConfidenceConstants = field(default_factory=ConfidenceConstants)
    stop_loss: StopLossConstants = field(default_factory=StopLossConstants)
    trailing_stop: TrailingStopConstants = field(default_factory=TrailingStopConstants)
    history: HistoryConstants = field(default_factory=HistoryConstants)
    leverage: LeverageConstants = field(default_factory=LeverageConstants)
    accrual: AccrualConstants = field(default_factory=AccrualConstants)
    dca: DcaConstants = field(default_factory=DcaConstants)
    performance: PerformanceConstants = field(default_factory=PerformanceConstants)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "TradingConstants":
        """Build from a (possibly partial) nested dict merged over defaults."""
        merged = deep_merge(cls().to_dict(), data or {})
        sections = {}
        for f in fields(cls):
            section_cls = f.default_factory
            values = merged.pop(f.name)
            try:
                sections[f.name] = section_cls(**values)
            except TypeError as e:
                raise ConfigError(f"Invalid constants section {f.name!r}: {e}") from e
        if merged:
            raise ConfigError(f"Unknown constants sections: {sorted(merged)}")
        constants = cls(**sections)
        constants.validate()
        return constants

    def validate(self) -> None:
        lev = self.leverage
        if not 0 < lev.borrow_fraction <= 1:
            raise ConfigError("leverage.borrow_fraction must be in (0, 1]")
        if not 0 < lev.close_withdraw_fraction <= 1:
            raise ConfigError("leverage.close_withdraw_fraction must be in (0, 1]")
        if not 1 <= lev.min_loops <= lev.max_loops:
            raise ConfigError("leverage loops must satisfy 1 <= min_loops <= max_loops")
        if lev.max_close_iterations < 1:
            raise ConfigError("leverage.max_close_iterations must be at least 1")
        if self.slippage.default_percent < 0 or self.slippage.default_percent > self.slippage.max_percent:
            raise ConfigError("slippage.default_percent must be within [0, max_percent]")
        if self.gas.reserve_eth < 0:
            raise ConfigError("gas.reserve_eth must be non-negative")
        if self.history.max_actions < 1 or self.history.max_closed_trades < 1:
            raise ConfigError("history limits must be at least 1")
        if self.rebalance.top_opportunities < 1:
            raise ConfigError("rebalance.top_opportunities must be at least 1")
        if self.rebalance.risk_tolerance not in RISK_TOLERANCE_TIERS:
            raise ConfigError(
                f"Unknown risk tolerance {self.rebalance.risk_tolerance!r}. "
                f"Valid: {', '.join(RISK_TOLERANCE_TIERS)}"
            )
        if self.accrual.max_refresh_growth_percent < 0:
            raise ConfigError("accrual.max_refresh_growth_percent must be non-negative")
        if self.dca.default_interval_seconds <= 0 or self.dca.max_slices < 1:
            raise ConfigError("dca interval must be positive and max_slices at least 1")
        if self.performance.max_equity_snapshots < 2:
            raise ConfigError("performance.max_equity_snapshots must be at least 2")

    def merged_with(self, updates: Dict[str, Any]) -> "TradingConstants":
        return TradingConstants.from_dict(deep_merge(self.to_dict(), updates))


def deep_merge(target: Dict[str, Any], source: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge source into a copy of target."""
    result = copy.deepcopy(target)
    for key, value in source.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


# =============================================================================
# LOADING
# =============================================================================

def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to config file. Defaults to config.yaml in the
            project root. A missing file yields an empty config (defaults).

    Returns:
        Config dictionary.

    Raises:
        yaml.YAMLError: If config file is malformed.
    """
    if config_path is None:
        path = Path(__file__).resolve().parents[2] / "config.yaml"
    else:
        path = Path(config_path)

    if not path.exists():
        logger.warning("Config file not found at %s, using defaults", path)
        return {}

    with open(path, "r", encoding="utf-8") as f:
        config = yaml.safe_load(f) or {}

    logger.debug("Configuration loaded from %s", path)
    return config


def setup_logging(config: Optional[Dict[str, Any]] = None, debug: bool = False) -> logging.Logger:
    """
    Configure the `yield_trader` logger namespace.

    Args:
        config: Configuration dictionary (uses its `logging:` section).
        debug: Force DEBUG level.

    Returns:
        Configured root logger for yield_trader.
    """
    log_cfg = (config or {}).get("logging", {}) or {}
    log_level = "DEBUG" if debug else log_cfg.get("level", "INFO")
    log_format = log_cfg.get("format", DEFAULT_LOG_FORMAT)
    date_format = log_cfg.get("date_format", DEFAULT_DATE_FORMAT)

    root_logger = logging.getLogger("yield_trader")
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter(log_format, datefmt=date_format))
    root_logger.addHandler(console_handler)

    log_file = log_cfg.get("file")
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(log_format, datefmt=date_format))
        root_logger.addHandler(file_handler)

    return root_logger
