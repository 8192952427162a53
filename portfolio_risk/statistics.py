"""
Statistical Estimation Module
==============================
Moments, correlation, regression, percentile extraction and the two
backtesting hypothesis tests.

Mathematical Foundation:
    Mean:        μ = E[r]
    Covariance:  Σ = E[(r - μ)(r - μ)^T]
    Pearson ρ:   cov(x, y) / (σ_x σ_y)
    Kupiec LR:   -2 ln[ p^x (1-p)^(T-x) / p̂^x (1-p̂)^(T-x) ]  ~ χ²(1)
    Christoffersen LR_cc = LR_uc + LR_ind                      ~ χ²(2)
"""

import math
from dataclasses import dataclass
from typing import Dict, Sequence

import numpy as np
import pandas as pd
from scipy import special
from scipy import stats

from portfolio_risk.config import (
    CHRISTOFFERSEN_CRITICAL_VALUE,
    KUPIEC_CRITICAL_VALUE,
)
from portfolio_risk.exceptions import InputValidationError, NumericalInstabilityError
from portfolio_risk.models import HypothesisTestResult


# ─────────────────────────────────────────────────────────────
# Frame-level estimators
# ─────────────────────────────────────────────────────────────

def compute_mean_vector(returns: pd.DataFrame) -> np.ndarray:
    """
    Compute the mean return vector.

    Parameters
    ----------
    returns : pd.DataFrame
        Daily returns (T x N).

    Returns
    -------
    np.ndarray
        Daily mean return vector (N,).
    """
    return returns.mean().values


def compute_covariance_matrix(returns: pd.DataFrame) -> np.ndarray:
    """
    Compute the sample covariance matrix of daily returns (ddof=1).

    Parameters
    ----------
    returns : pd.DataFrame
        Daily returns (T x N).

    Returns
    -------
    np.ndarray
        Covariance matrix (N x N).
    """
    return np.atleast_2d(np.cov(returns.values, rowvar=False, ddof=1))


def correlation_matrix(returns: np.ndarray, method: str = "PEARSON") -> np.ndarray:
    """
    Pairwise correlation matrix of the columns of ``returns``.

    Parameters
    ----------
    returns : np.ndarray
        Aligned return series (T x N).
    method : str
        "PEARSON" or "SPEARMAN".

    Returns
    -------
    np.ndarray
        Correlation matrix (N x N) with unit diagonal.
    """
    data = np.asarray(returns, dtype=float)
    corr_fn = spearman_correlation if method.upper() == "SPEARMAN" else pearson_correlation
    n = data.shape[1]
    out = np.eye(n)
    for i in range(n):
        for j in range(i + 1, n):
            out[i, j] = out[j, i] = corr_fn(data[:, i], data[:, j])
    return out


# ─────────────────────────────────────────────────────────────
# Moments
# ─────────────────────────────────────────────────────────────

def distribution_moments(values: Sequence[float]) -> Dict[str, float]:
    """
    Mean, sample standard deviation, skewness and excess kurtosis.

    Skewness and kurtosis are the third and fourth standardized moments
    (kurtosis reported in excess of the Gaussian 3). A constant sample has
    both set to 0.
    """
    x = np.asarray(values, dtype=float)
    if x.size == 0:
        raise InputValidationError("values", "cannot compute moments of an empty sample")
    mean = float(x.mean())
    std = float(x.std(ddof=1)) if x.size > 1 else 0.0
    if std == 0.0 or not np.isfinite(std):
        return {"mean": mean, "std": 0.0, "skewness": 0.0, "kurtosis": 0.0}
    return {
        "mean": mean,
        "std": std,
        "skewness": float(stats.skew(x)),
        "kurtosis": float(stats.kurtosis(x)),
    }


# ─────────────────────────────────────────────────────────────
# Correlation and regression
# ─────────────────────────────────────────────────────────────

def pearson_correlation(x: Sequence[float], y: Sequence[float]) -> float:
    """
    Pearson correlation over the common length of ``x`` and ``y``.

    Zero-variance inputs (and samples shorter than 2) yield 0.
    """
    n = min(len(x), len(y))
    if n < 2:
        return 0.0
    xa = np.asarray(x[:n], dtype=float)
    ya = np.asarray(y[:n], dtype=float)
    dx = xa - xa.mean()
    dy = ya - ya.mean()
    denominator = math.sqrt(float(dx @ dx) * float(dy @ dy))
    if denominator == 0.0:
        return 0.0
    return float(np.clip((dx @ dy) / denominator, -1.0, 1.0))


def spearman_correlation(x: Sequence[float], y: Sequence[float]) -> float:
    """Rank-transform both series (average ties) then take Pearson."""
    n = min(len(x), len(y))
    if n < 2:
        return 0.0
    return pearson_correlation(
        stats.rankdata(np.asarray(x[:n], dtype=float)),
        stats.rankdata(np.asarray(y[:n], dtype=float)),
    )


@dataclass(frozen=True)
class RegressionResult:
    slope: float
    intercept: float
    r_squared: float


def linear_regression(x: Sequence[float], y: Sequence[float]) -> RegressionResult:
    """
    Closed-form ordinary least squares fit y = a + b x.

    Raises
    ------
    NumericalInstabilityError
        If ``x`` has no variance (the slope is undefined).
    """
    xa = np.asarray(x, dtype=float)
    ya = np.asarray(y, dtype=float)
    if xa.shape != ya.shape or xa.size == 0:
        raise InputValidationError("x", "x and y must be non-empty and of equal length")

    n = xa.size
    sum_x, sum_y = xa.sum(), ya.sum()
    denominator = n * (xa @ xa) - sum_x * sum_x
    if n < 2 or abs(denominator) <= 1e-12 * max(1.0, n * (xa @ xa)):
        raise NumericalInstabilityError("regression slope", "x has zero variance")

    slope = (n * (xa @ ya) - sum_x * sum_y) / denominator
    intercept = (sum_y - slope * sum_x) / n

    residual = ya - (intercept + slope * xa)
    total = ya - ya.mean()
    ss_tot = float(total @ total)
    r_squared = 1.0 - float(residual @ residual) / ss_tot if ss_tot > 0 else 1.0
    return RegressionResult(float(slope), float(intercept), r_squared)


# ─────────────────────────────────────────────────────────────
# Percentiles
# ─────────────────────────────────────────────────────────────

def nearest_rank_index(n: int, fraction: float) -> int:
    """floor(fraction · n), clamped to a valid index."""
    if n <= 0:
        raise InputValidationError("values", "cannot index an empty sample")
    idx = math.floor(round(fraction * n, 9))
    return min(max(idx, 0), n - 1)


def percentile(values: Sequence[float], rank: float) -> float:
    """
    Nearest-rank percentile on a value-sorted copy.

    Parameters
    ----------
    values : sequence of float
        Sample (not modified).
    rank : float
        Percentile rank in [0, 100].
    """
    ordered = np.sort(np.asarray(values, dtype=float))
    return float(ordered[nearest_rank_index(ordered.size, rank / 100.0)])


# ─────────────────────────────────────────────────────────────
# Backtesting hypothesis tests
# ─────────────────────────────────────────────────────────────

def _bernoulli_loglik(successes: float, failures: float, p: float) -> float:
    return float(special.xlogy(successes, p) + special.xlogy(failures, 1.0 - p))


def kupiec_test(
    exceptions: int,
    observations: int,
    expected_exception_rate: float,
    critical_value: float = KUPIEC_CRITICAL_VALUE,
) -> HypothesisTestResult:
    """
    Kupiec Proportion of Failures (unconditional coverage) test.

    Null hypothesis: the observed exception rate equals the expected one.

    Parameters
    ----------
    exceptions : int
        Days on which the realized loss exceeded VaR.
    observations : int
        Days in the test window.
    expected_exception_rate : float
        1 - confidence level.

    Returns
    -------
    HypothesisTestResult
        LR statistic against χ²(1); the null is rejected above
        ``critical_value`` (3.841 at 95%).
    """
    if observations <= 0:
        raise InputValidationError("observations", "observations must be positive")
    if not 0 <= exceptions <= observations:
        raise InputValidationError("exceptions", "exceptions must lie in [0, observations]")
    p = expected_exception_rate
    if not 0.0 < p < 1.0:
        raise InputValidationError("expected_exception_rate", "rate must lie in (0, 1)")

    x, T = exceptions, observations
    p_hat = x / T
    lr = -2.0 * (_bernoulli_loglik(x, T - x, p) - _bernoulli_loglik(x, T - x, p_hat))
    lr = max(lr, 0.0)
    p_value = float(stats.chi2.sf(lr, df=1))

    return HypothesisTestResult(
        test_statistic=lr,
        critical_value=critical_value,
        p_value=p_value,
        reject_null=lr > critical_value,
    )


def _transition_counts(indicators: np.ndarray) -> Dict[str, int]:
    prev, curr = indicators[:-1], indicators[1:]
    return {
        "n00": int(np.sum(~prev & ~curr)),
        "n01": int(np.sum(~prev & curr)),
        "n10": int(np.sum(prev & ~curr)),
        "n11": int(np.sum(prev & curr)),
    }


def christoffersen_independence_statistic(indicators: Sequence[bool]) -> float:
    """Markov-chain likelihood ratio for clustering of exceptions."""
    hits = np.asarray(indicators, dtype=bool)
    if hits.size < 2:
        raise InputValidationError("indicators", "need at least two observations")
    c = _transition_counts(hits)
    n00, n01, n10, n11 = c["n00"], c["n01"], c["n10"], c["n11"]

    pi01 = n01 / (n00 + n01) if (n00 + n01) else 0.0
    pi11 = n11 / (n10 + n11) if (n10 + n11) else 0.0
    pi = (n01 + n11) / (n00 + n01 + n10 + n11)

    restricted = _bernoulli_loglik(n01 + n11, n00 + n10, pi)
    unrestricted = _bernoulli_loglik(n01, n00, pi01) + _bernoulli_loglik(n11, n10, pi11)
    return max(-2.0 * (restricted - unrestricted), 0.0)


def christoffersen_test(
    indicators: Sequence[bool],
    expected_exception_rate: float,
    critical_value: float = CHRISTOFFERSEN_CRITICAL_VALUE,
) -> HypothesisTestResult:
    """
    Christoffersen conditional coverage test.

    Combines the Kupiec statistic with the first-order Markov independence
    statistic, LR_cc = LR_uc + LR_ind, which is χ²(2) under the null of a
    correctly calibrated model whose exceptions do not cluster.

    Parameters
    ----------
    indicators : sequence of bool
        Exception flag per day, in time order.
    expected_exception_rate : float
        1 - confidence level.
    """
    hits = np.asarray(indicators, dtype=bool)
    lr_ind = christoffersen_independence_statistic(hits)
    lr_uc = kupiec_test(int(hits.sum()), hits.size, expected_exception_rate).test_statistic
    lr_cc = lr_uc + lr_ind
    p_value = float(stats.chi2.sf(lr_cc, df=2))

    return HypothesisTestResult(
        test_statistic=lr_cc,
        critical_value=critical_value,
        p_value=p_value,
        reject_null=lr_cc > critical_value,
    )
