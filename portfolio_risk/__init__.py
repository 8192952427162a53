"""
Portfolio Risk Engine
=====================
Quantitative risk analytics for multi-asset portfolio snapshots:
- Parametric, Historical Simulation and Monte Carlo VaR
- Component, Marginal and Incremental VaR decomposition
- Correlated GBM path simulation with optional jump risk
- Kupiec and Christoffersen backtesting
- Factor-shock stress testing with a historical scenario library
- Correlation, PCA and concentration analysis
"""

from portfolio_risk.correlation import CorrelationAnalyzer
from portfolio_risk.logging_config import configure_logging
from portfolio_risk.monte_carlo import MonteCarloEngine
from portfolio_risk.simulation import RandomPathSimulator
from portfolio_risk.stress_testing import StressTestEngine
from portfolio_risk.var_engine import VaREngine

__version__ = "1.0.0"

__all__ = [
    "CorrelationAnalyzer",
    "MonteCarloEngine",
    "RandomPathSimulator",
    "StressTestEngine",
    "VaREngine",
    "configure_logging",
]
