"""
Backtesting Module
==================
Replays realized returns against predicted VaR, counts exceptions and
runs the Kupiec and Christoffersen coverage tests.

Framework:
    1. Predicted 1-day VaR per day (fixed, or re-estimated on a rolling
       250-day window)
    2. Exception when the realized loss exceeds the predicted VaR
    3. Kupiec POF test on the exception count
    4. Christoffersen conditional coverage test on the exception sequence
    5. Model accurate when neither test rejects
"""

from typing import Dict, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import structlog

from portfolio_risk.config import DEFAULT_BACKTEST_PERIOD, MIN_BACKTEST_OBSERVATIONS
from portfolio_risk.exceptions import InsufficientDataError
from portfolio_risk.models import BacktestResult, validate_confidence_level
from portfolio_risk.risk_metrics import compute_parametric_var
from portfolio_risk.statistics import (
    christoffersen_test,
    compute_covariance_matrix,
    compute_mean_vector,
    kupiec_test,
)

logger = structlog.get_logger(__name__)


# ─────────────────────────────────────────────────────────────
# Constants
# ─────────────────────────────────────────────────────────────
DEFAULT_WINDOW: int = DEFAULT_BACKTEST_PERIOD
DEFAULT_CONFIDENCE: float = 0.99


def run_backtest(
    realized_returns: Sequence[float],
    predicted_var: Union[float, Sequence[float]],
    confidence_level: float = DEFAULT_CONFIDENCE,
    min_observations: int = MIN_BACKTEST_OBSERVATIONS,
) -> BacktestResult:
    """
    Backtest VaR predictions against realized portfolio returns.

    Parameters
    ----------
    realized_returns : sequence of float
        Realized daily portfolio returns, in time order.
    predicted_var : float or sequence of float
        1-day VaR as a positive return-space loss, either one figure for
        every day or one per day.
    confidence_level : float
        VaR confidence level; the expected exception rate is 1 - c.

    Returns
    -------
    BacktestResult

    Raises
    ------
    InsufficientDataError
        If fewer than ``min_observations`` returns are supplied.
    """
    confidence_level = validate_confidence_level(confidence_level)
    returns = np.asarray(realized_returns, dtype=float)
    threshold = np.broadcast_to(np.asarray(predicted_var, dtype=float), returns.shape)
    finite = np.isfinite(returns) & np.isfinite(threshold)
    returns, threshold = returns[finite], threshold[finite]
    if returns.size < min_observations:
        raise InsufficientDataError(min_observations, returns.size, "backtest observations")

    exceptions = -returns > threshold
    n_exceptions = int(exceptions.sum())
    expected_rate = 1.0 - confidence_level

    kupiec = kupiec_test(n_exceptions, returns.size, expected_rate)
    christoffersen = christoffersen_test(exceptions, expected_rate)

    logger.info(
        "backtest_completed",
        observations=int(returns.size),
        exceptions=n_exceptions,
        kupiec_lr=round(kupiec.test_statistic, 4),
        christoffersen_lr=round(christoffersen.test_statistic, 4),
    )

    return BacktestResult(
        observations=int(returns.size),
        number_of_exceptions=n_exceptions,
        exception_rate=n_exceptions / returns.size,
        expected_exception_rate=expected_rate,
        kupiec_test=kupiec,
        christoffersen_test=christoffersen,
        is_model_accurate=not kupiec.reject_null and not christoffersen.reject_null,
    )


def rolling_var_backtest(
    returns: pd.DataFrame,
    weights: np.ndarray,
    window: int = DEFAULT_WINDOW,
    confidence_level: float = DEFAULT_CONFIDENCE,
) -> pd.DataFrame:
    """
    Perform rolling-window parametric VaR backtesting.

    Algorithm:
        For each day t (starting from index `window`):
            1. Estimate μ and Σ from days [t - window, t)
            2. Compute portfolio σ_p from w^T Σ w
            3. Compute 1-day Parametric VaR at given confidence
            4. Record actual portfolio return at day t
            5. Flag if actual loss exceeds VaR (breach)

    Parameters
    ----------
    returns : pd.DataFrame
        Daily returns of all assets (T x N).
    weights : np.ndarray
        Portfolio weight vector (N,).
    window : int
        Rolling estimation window size (default: 250 trading days).
    confidence_level : float
        VaR confidence level (default: 0.99).

    Returns
    -------
    pd.DataFrame
        Columns: date, predicted_var, actual_return, actual_loss, breach
    """
    results = []

    for t in range(window, len(returns)):
        window_returns = returns.iloc[t - window : t]

        mu = compute_mean_vector(window_returns)
        cov = compute_covariance_matrix(window_returns)

        port_mean = float(weights @ mu)
        port_std = float(np.sqrt(max(weights @ cov @ weights, 0.0)))
        predicted_var = compute_parametric_var(port_mean, port_std, confidence_level)

        actual_return = float(returns.iloc[t].values @ weights)

        results.append({
            "date": returns.index[t],
            "predicted_var": predicted_var,
            "actual_return": actual_return,
            "actual_loss": -actual_return,
            "breach": -actual_return > predicted_var,
        })

    return pd.DataFrame(
        results, columns=["date", "predicted_var", "actual_return", "actual_loss", "breach"]
    )


def compute_breach_statistics(
    backtest_results: pd.DataFrame,
    confidence_level: float = DEFAULT_CONFIDENCE,
) -> Dict[str, float]:
    """
    Breach counts and ratios for a rolling backtest frame.

    Returns
    -------
    dict
        total_observations, num_breaches, breach_rate,
        expected_breach_rate, breach_ratio.
    """
    total = len(backtest_results)
    breaches = int(backtest_results["breach"].sum())
    breach_rate = breaches / total if total > 0 else 0.0
    expected_rate = 1 - confidence_level

    return {
        "total_observations": total,
        "num_breaches": breaches,
        "breach_rate": breach_rate,
        "expected_breach_rate": expected_rate,
        "breach_ratio": breach_rate / expected_rate if expected_rate > 0 else 0.0,
    }


def run_full_backtest(
    returns: pd.DataFrame,
    weights: np.ndarray,
    window: int = DEFAULT_WINDOW,
    confidence_level: float = DEFAULT_CONFIDENCE,
) -> Tuple[pd.DataFrame, Dict[str, float], BacktestResult]:
    """
    Rolling backtest followed by the coverage tests on its breaches.

    Returns
    -------
    tuple
        (backtest_results_df, breach_stats, backtest_result)
    """
    bt_results = rolling_var_backtest(returns, weights, window, confidence_level)
    breach_stats = compute_breach_statistics(bt_results, confidence_level)
    result = run_backtest(
        bt_results["actual_return"].values,
        bt_results["predicted_var"].values,
        confidence_level,
    )
    return bt_results, breach_stats, result
