"""
Yield Trader

Autonomous position manager for on-chain lending yields:
1. Rank supply opportunities and enter the best one
2. Watch open positions against take-profit, stop-loss and trailing stop
3. Rebalance when a better allocation pays back its gas within a week
4. Run leveraged supply/borrow loops under a health-factor floor
5. Split entries into scheduled DCA slices and track trade performance

All chain access goes through a Gateway; PaperGateway simulates one.
"""

from .config import (
    MODE_PRESETS,
    RISK_TOLERANCE_TIERS,
    ConfigError,
    StrategyConfig,
    TradingConstants,
    load_config,
    setup_logging,
)
from .models import (
    AccountHealth,
    ActionType,
    ClosedTrade,
    CycleResult,
    MarketRegime,
    MarketSnapshot,
    Opportunity,
    OutcomeStatus,
    Position,
    Quote,
    RecommendedAction,
    RiskTier,
    StepRecord,
    StepStatus,
    TradingAction,
    TxResult,
)
from .gateway import ALL, Gateway, GatewayError, PaperGateway
from .swaps import SwapAndSupplyResult, SwapOutcome, SwapQuote, SwapRouter
from .persistence import InMemoryStore, JsonFileStore
from .ledger import PositionLedger
from .performance import EquitySnapshot, PerformanceMetrics, PerformanceTracker
from .dca import DcaExecution, DcaPlan, DcaPlanManager, DcaStatus
from .policy import (
    Decision,
    EntryDecision,
    PositionDecision,
    evaluate_opportunity,
    evaluate_position,
    should_rebalance,
)
from .ranker import OpportunityRanker, RebalanceRecommendation
from .rebalancer import RebalanceExecutor, RebalanceReport
from .leverage import LeverageManager, LoopResult
from .market_data import (
    CoinGeckoMarketData,
    DefiLlamaOpportunitySource,
    StaticMarketData,
    StaticOpportunitySource,
    classify_market,
)
from .orchestrator import DryRunResult, OptimizeResult, TradingOrchestrator

__all__ = [
    # Config
    "MODE_PRESETS",
    "RISK_TOLERANCE_TIERS",
    "ConfigError",
    "StrategyConfig",
    "TradingConstants",
    "load_config",
    "setup_logging",
    # Models
    "AccountHealth",
    "ActionType",
    "ClosedTrade",
    "CycleResult",
    "MarketRegime",
    "MarketSnapshot",
    "Opportunity",
    "OutcomeStatus",
    "Position",
    "Quote",
    "RecommendedAction",
    "RiskTier",
    "StepRecord",
    "StepStatus",
    "TradingAction",
    "TxResult",
    # Gateway
    "ALL",
    "Gateway",
    "GatewayError",
    "PaperGateway",
    # Swaps
    "SwapAndSupplyResult",
    "SwapOutcome",
    "SwapQuote",
    "SwapRouter",
    # Persistence
    "InMemoryStore",
    "JsonFileStore",
    # Ledger
    "PositionLedger",
    # Performance
    "EquitySnapshot",
    "PerformanceMetrics",
    "PerformanceTracker",
    # DCA
    "DcaExecution",
    "DcaPlan",
    "DcaPlanManager",
    "DcaStatus",
    # Policy
    "Decision",
    "EntryDecision",
    "PositionDecision",
    "evaluate_opportunity",
    "evaluate_position",
    "should_rebalance",
    # Ranking and rebalancing
    "OpportunityRanker",
    "RebalanceRecommendation",
    "RebalanceExecutor",
    "RebalanceReport",
    # Leverage
    "LeverageManager",
    "LoopResult",
    # Market data
    "CoinGeckoMarketData",
    "DefiLlamaOpportunitySource",
    "StaticMarketData",
    "StaticOpportunitySource",
    "classify_market",
    # Orchestrator
    "DryRunResult",
    "OptimizeResult",
    "TradingOrchestrator",
]
