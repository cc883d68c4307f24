"""coinvalue.forecast - Trend fitting and multi-horizon projection."""

from coinvalue.forecast.engine import ForecastEngine, project, simulate_paths
from coinvalue.forecast.trend import TrendFit, assess_risk, fit_trend, volatility

__all__ = [
    "ForecastEngine",
    "project",
    "simulate_paths",
    "TrendFit",
    "fit_trend",
    "volatility",
    "assess_risk",
]
