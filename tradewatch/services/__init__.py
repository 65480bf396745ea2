from .alert_evaluator import AlertEvaluator, AlertMonitor
from .portfolio_calculator import PortfolioCalculator
from .trade_executor import TradeExecutor

__all__ = ["AlertEvaluator", "AlertMonitor", "PortfolioCalculator", "TradeExecutor"]
