"""
Risk Metrics Module
====================
Parametric and empirical (scenario-based) VaR and Expected Shortfall
primitives shared by the VaR engine, the backtester and the report.

Mathematical Foundation:
    Parametric VaR:   VaR = z_c · √h · sqrt(eᵀ Σ e)         (money)
                      VaR = z_c · σ_p - μ_p                 (return space)
    Parametric ES:    ES  = σ_p · φ(z_c) / (1 - c) - μ_p
    Empirical VaR:    -P&L_(⌊(1-c)·T⌋) on ascending-sorted P&L
    Euler allocation: VaR = Σ_i e_i · ∂VaR/∂e_i
"""

import math
from typing import Dict, Tuple

import numpy as np
import pandas as pd
from scipy import stats

from portfolio_risk.config import Z_SCORES
from portfolio_risk.exceptions import NumericalInstabilityError
from portfolio_risk.models import validate_confidence_level
from portfolio_risk.statistics import nearest_rank_index


def z_score(confidence_level: float) -> float:
    """Fixed one-sided normal quantile for a supported confidence level."""
    return Z_SCORES[validate_confidence_level(confidence_level)]


# ─────────────────────────────────────────────────────────────
# Parametric (Variance-Covariance)
# ─────────────────────────────────────────────────────────────

def compute_parametric_var(
    portfolio_mean: float,
    portfolio_std: float,
    confidence_level: float = 0.99,
) -> float:
    """
    Parametric VaR in return space assuming Gaussian returns.

    Mathematical Definition:
        VaR_c = z_c · σ_p - μ_p

    Parameters
    ----------
    portfolio_mean : float
        Daily portfolio mean return.
    portfolio_std : float
        Daily portfolio standard deviation.
    confidence_level : float
        Confidence level (default: 0.99).

    Returns
    -------
    float
        Parametric VaR (positive = loss magnitude).
    """
    return float(z_score(confidence_level) * portfolio_std - portfolio_mean)


def compute_parametric_es(
    portfolio_mean: float,
    portfolio_std: float,
    confidence_level: float = 0.99,
) -> float:
    """
    Parametric Expected Shortfall under the Gaussian assumption.

    Mathematical Definition:
        ES_c = σ_p · φ(z_c) / (1 - c) - μ_p

    Where φ is the standard normal PDF.
    """
    phi_z = stats.norm.pdf(z_score(confidence_level))
    return float(portfolio_std * phi_z / (1.0 - confidence_level) - portfolio_mean)


def portfolio_std(exposures: np.ndarray, covariance: np.ndarray) -> float:
    """sqrt(eᵀ Σ e), with tiny negative round-off clamped to 0."""
    variance = float(exposures @ covariance @ exposures)
    if not math.isfinite(variance):
        raise NumericalInstabilityError("portfolio variance", "non-finite value")
    return math.sqrt(max(variance, 0.0))


def parametric_var(
    exposures: np.ndarray,
    covariance: np.ndarray,
    confidence_level: float,
    horizon_days: int = 1,
) -> float:
    """
    Money VaR of an exposure vector.

    Parameters
    ----------
    exposures : np.ndarray
        Market value per asset (N,).
    covariance : np.ndarray
        Daily return covariance (N x N).
    horizon_days : int
        Square-root-of-time scaling horizon.
    """
    return z_score(confidence_level) * math.sqrt(horizon_days) * portfolio_std(exposures, covariance)


def parametric_euler_contributions(
    exposure_rows: np.ndarray,
    exposures: np.ndarray,
    covariance: np.ndarray,
    confidence_level: float,
    horizon_days: int = 1,
) -> np.ndarray:
    """
    Euler contribution of each row of ``exposure_rows`` to the VaR of
    ``exposures`` (rows summing to ``exposures`` recover the full VaR).

    Raises
    ------
    NumericalInstabilityError
        If the portfolio volatility is zero.
    """
    sigma = portfolio_std(exposures, covariance)
    if sigma == 0.0:
        raise NumericalInstabilityError("euler contribution", "portfolio volatility is zero")
    scale = z_score(confidence_level) * math.sqrt(horizon_days) / sigma
    return scale * (exposure_rows @ (covariance @ exposures))


# ─────────────────────────────────────────────────────────────
# Empirical (historical or simulated scenarios)
# ─────────────────────────────────────────────────────────────

def empirical_quantile(pnl: np.ndarray, confidence_level: float) -> Tuple[float, int]:
    """
    Nearest-rank lower-tail quantile of a P&L sample.

    Returns
    -------
    tuple
        (quantile P&L, index of that scenario in the unsorted sample).
    """
    pnl = np.asarray(pnl, dtype=float)
    order = np.argsort(pnl, kind="stable")
    idx = nearest_rank_index(pnl.size, 1.0 - confidence_level)
    scenario = int(order[idx])
    return float(pnl[scenario]), scenario


def empirical_var(pnl: np.ndarray, confidence_level: float) -> float:
    """Loss magnitude at the nearest-rank quantile, floored at 0."""
    quantile, _ = empirical_quantile(pnl, confidence_level)
    return max(-quantile, 0.0)


def empirical_es(pnl: np.ndarray, confidence_level: float) -> float:
    """Mean loss over every scenario at or below the VaR index."""
    ordered = np.sort(np.asarray(pnl, dtype=float))
    idx = nearest_rank_index(ordered.size, 1.0 - confidence_level)
    return max(-float(ordered[: idx + 1].mean()), 0.0)


def historical_risk_metrics(portfolio_returns: pd.Series) -> Dict[str, float]:
    """
    VaR and ES of a return series at 95% and 99%.

    Returns
    -------
    dict
        hist_var_95, hist_var_99, hist_es_95, hist_es_99 (fractions).
    """
    values = portfolio_returns.values
    return {
        "hist_var_95": empirical_var(values, 0.95),
        "hist_var_99": empirical_var(values, 0.99),
        "hist_es_95": empirical_es(values, 0.95),
        "hist_es_99": empirical_es(values, 0.99),
    }


def parametric_risk_metrics(portfolio_mean: float, portfolio_std_: float) -> Dict[str, float]:
    """VaR and ES at 95% and 99% from daily mean and std."""
    return {
        "param_var_95": compute_parametric_var(portfolio_mean, portfolio_std_, 0.95),
        "param_var_99": compute_parametric_var(portfolio_mean, portfolio_std_, 0.99),
        "param_es_95": compute_parametric_es(portfolio_mean, portfolio_std_, 0.95),
        "param_es_99": compute_parametric_es(portfolio_mean, portfolio_std_, 0.99),
    }
