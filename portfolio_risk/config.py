"""
Engine Configuration
====================
Default constants shared by the risk engines. Per-call overrides are carried
on the request dataclasses in ``portfolio_risk.models``.
"""

from typing import Dict


# ─────────────────────────────────────────────────────────────
# Calendar
# ─────────────────────────────────────────────────────────────
TRADING_DAYS_PER_YEAR: int = 252

HORIZON_TRADING_DAYS: Dict[str, int] = {
    "1D": 1,
    "1W": 5,
    "2W": 10,
    "1M": 21,
    "3M": 63,
    "6M": 126,
    "1Y": 252,
}


# ─────────────────────────────────────────────────────────────
# Confidence levels
# ─────────────────────────────────────────────────────────────
SUPPORTED_CONFIDENCE_LEVELS = (0.95, 0.99, 0.999)

Z_SCORES: Dict[float, float] = {
    0.95: 1.645,
    0.99: 2.326,
    0.999: 3.090,
}


# ─────────────────────────────────────────────────────────────
# Monte Carlo
# ─────────────────────────────────────────────────────────────
DEFAULT_NUM_SIMULATIONS: int = 10_000
DEFAULT_SEED: int = 42
MIN_TRIALS: int = 2
CONVERGENCE_BATCHES: int = 10
CONVERGENCE_T_VALUE: float = 2.262  # t(0.975, 9 dof)
CONVERGENCE_RELATIVE_THRESHOLD: float = 0.01
REPORTED_PERCENTILES = (1, 5, 10, 25, 50, 75, 90, 95, 99)

DEFAULT_JUMP_INTENSITY: float = 0.1  # jumps per year
DEFAULT_JUMP_MEAN: float = -0.05
DEFAULT_JUMP_STD: float = 0.15


# ─────────────────────────────────────────────────────────────
# Linear algebra
# ─────────────────────────────────────────────────────────────
RIDGE_ALPHA: float = 0.01
EIGENVALUE_FLOOR: float = 1e-8
SYMMETRY_TOLERANCE: float = 1e-8
POWER_ITERATION_TOLERANCE: float = 1e-6
POWER_ITERATION_MAX_ITER: int = 100
DEFAULT_PCA_COMPONENTS: int = 5


# ─────────────────────────────────────────────────────────────
# VaR and backtesting
# ─────────────────────────────────────────────────────────────
MIN_HISTORICAL_OBSERVATIONS: int = 30
MIN_BACKTEST_OBSERVATIONS: int = 30
DEFAULT_BACKTEST_PERIOD: int = 250
KUPIEC_CRITICAL_VALUE: float = 3.841  # chi2(1) at 95%
CHRISTOFFERSEN_CRITICAL_VALUE: float = 5.991  # chi2(2) at 95%
TEST_SIGNIFICANCE: float = 0.05

# Prior accuracy reported when no backtest is requested.
METHOD_PRIOR_ACCURACY: Dict[str, float] = {
    "PARAMETRIC": 0.95,
    "HISTORICAL_SIMULATION": 0.92,
    "MONTE_CARLO": 0.94,
}


# ─────────────────────────────────────────────────────────────
# Stress testing
# ─────────────────────────────────────────────────────────────
STRESS_CORRELATION_UPLIFT: float = 0.2
SIGNIFICANT_CORRELATION_CHANGE: float = 0.1
SCENARIO_VOLATILITY_SCALE: float = 0.1
BASIS_POINT: float = 1e-4

DEFAULT_BETA: float = 1.0
DEFAULT_DURATION: float = 7.5
DEFAULT_CREDIT_DURATION: float = 5.0
DEFAULT_OPTION_VEGA: float = 0.15  # % of market value per vol point
EQUITY_RATE_DURATION: float = 0.1
COMMODITY_SENSITIVITY: float = 0.5
BASE_CURRENCY: str = "USD"


# ─────────────────────────────────────────────────────────────
# Concurrency
# ─────────────────────────────────────────────────────────────
DEFAULT_MAX_WORKERS: int = 4
