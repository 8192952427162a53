"""
Portfolio Construction Module
=============================
Handles price ingestion, return computation, position weights and
exposures, portfolio return aggregation and factor-model estimation.

Mathematical Foundation:
    Log return:        r_t = ln(P_t / P_{t-1})
    Simple return:     r_t = (P_t - P_{t-1}) / P_{t-1}
    Weight:            w_i = MV_i / |V|,   V = Σ MV_i
    Portfolio P&L:     ΔV_t = e^T r_t      (e = per-asset market value)

Positions referencing the same instrument are netted into one asset
exposure; historical return frames carry one column per instrument id.
"""

import warnings
from datetime import date
from typing import Dict, List, Mapping, Optional, Sequence

import numpy as np
import pandas as pd
import yfinance as yf
from scipy import stats as scipy_stats

from portfolio_risk.config import TRADING_DAYS_PER_YEAR
from portfolio_risk.exceptions import InputValidationError, InsufficientDataError
from portfolio_risk.models import PortfolioSnapshot, Position, RiskFactorModel
from portfolio_risk.statistics import correlation_matrix


# ─────────────────────────────────────────────────────────────
# Constants
# ─────────────────────────────────────────────────────────────
DEFAULT_TICKERS: List[str] = ["SPY", "QQQ", "JPM", "TLT", "GLD"]

DEFAULT_WEIGHTS: Dict[str, float] = {
    "SPY": 0.30,   # Broad equity index
    "QQQ": 0.20,   # High-beta tech
    "JPM": 0.15,   # Financial sector
    "TLT": 0.20,   # Long-duration bonds
    "GLD": 0.15,   # Gold hedge
}

DEFAULT_CLASSIFICATION: Dict[str, Dict[str, str]] = {
    "SPY": {"asset_class": "EQUITY", "sector": "BROAD_MARKET", "geography": "US"},
    "QQQ": {"asset_class": "EQUITY", "sector": "TECHNOLOGY", "geography": "US"},
    "JPM": {"asset_class": "EQUITY", "sector": "FINANCIALS", "geography": "US"},
    "TLT": {"asset_class": "FIXED_INCOME", "sector": "GOVERNMENT", "geography": "US"},
    "GLD": {"asset_class": "COMMODITY", "sector": "PRECIOUS_METALS", "geography": "GLOBAL"},
}


# ─────────────────────────────────────────────────────────────
# Price ingestion (market-data collaborator)
# ─────────────────────────────────────────────────────────────

def fetch_data(
    tickers: List[str] = DEFAULT_TICKERS,
    start: str = "2021-01-01",
    end: str = "2026-01-01",
    save_path: Optional[str] = None,
    window: Optional[int] = None,
) -> pd.DataFrame:
    """
    Download adjusted close prices from Yahoo Finance.

    Parameters
    ----------
    tickers : list of str
        Ticker symbols to download.
    start : str
        Start date in YYYY-MM-DD format.
    end : str
        End date in YYYY-MM-DD format.
    save_path : str, optional
        If provided, saves the DataFrame as CSV.
    window : int, optional
        If given, return only the last `window` trading days before `end`.

    Returns
    -------
    pd.DataFrame
        Adjusted close prices indexed by date, one column per ticker.
    """
    raw = yf.download(tickers, start=start, end=end, auto_adjust=True)

    # yfinance returns MultiIndex columns for several tickers
    if isinstance(raw.columns, pd.MultiIndex):
        prices = raw["Close"].copy()
    else:
        prices = raw[["Close"]].copy()
        prices.columns = tickers

    prices.dropna(inplace=True)

    if window is not None:
        prices = prices.iloc[-window:]

    if save_path:
        prices.to_csv(save_path)

    return prices


def load_data(path: str) -> pd.DataFrame:
    """
    Load price data from a CSV file with a date index and asset columns.
    """
    df = pd.read_csv(path, index_col=0, parse_dates=True)
    df.dropna(inplace=True)
    return df


def compute_log_returns(prices: pd.DataFrame) -> pd.DataFrame:
    """
    Compute logarithmic returns from price series.

    Used for volatility and correlation estimation, where the additive
    property keeps multi-day aggregation consistent with GBM.
    """
    return np.log(prices / prices.shift(1)).dropna()


def compute_simple_returns(prices: pd.DataFrame) -> pd.DataFrame:
    """
    Compute simple (arithmetic) returns from price series.

    Used for historical-simulation P&L, where ΔV = MV · r holds exactly.
    """
    return prices.pct_change().dropna()


# ─────────────────────────────────────────────────────────────
# Snapshot construction
# ─────────────────────────────────────────────────────────────

def define_weights(
    custom_weights: Optional[Dict[str, float]] = None,
    tickers: Optional[List[str]] = None,
) -> pd.Series:
    """
    Define and validate target weights for a long-only model book.

    Parameters
    ----------
    custom_weights : dict, optional
        Mapping ticker -> weight. Must sum to 1.
    tickers : list of str, optional
        Ordered tickers; defaults to the sorted weight keys.

    Returns
    -------
    pd.Series
        Weights indexed by ticker.

    Raises
    ------
    InputValidationError
        If a ticker has no weight or the weights do not sum to 1.
    """
    if custom_weights is None:
        custom_weights = DEFAULT_WEIGHTS
    if tickers is None:
        tickers = sorted(custom_weights.keys())

    weights = pd.Series(custom_weights, dtype=float).reindex(tickers)
    if weights.isna().any():
        missing = weights[weights.isna()].index.tolist()
        raise InputValidationError("weights", f"no weight defined for tickers {missing}")

    weight_sum = weights.sum()
    if not np.isclose(weight_sum, 1.0, rtol=1e-8, atol=1e-8):
        if abs(weight_sum - 1.0) < 1e-4:
            warnings.warn(
                f"Weights sum to {weight_sum:.10f}; auto-normalizing.",
                UserWarning,
                stacklevel=2,
            )
            weights = weights / weight_sum
        else:
            raise InputValidationError("weights", f"weights must sum to 1.0, got {weight_sum:.6f}")

    return weights


def build_snapshot(
    portfolio_id: str,
    as_of_date: date,
    weights: pd.Series,
    notional: float,
    classification: Mapping[str, Mapping[str, str]] = DEFAULT_CLASSIFICATION,
) -> PortfolioSnapshot:
    """
    Turn target weights and a notional into a validated snapshot, one
    position per ticker (the ticker doubles as instrument id and symbol).
    """
    positions = []
    for ticker, weight in weights.items():
        meta = dict(classification.get(ticker, {}))
        positions.append(
            Position(
                id=f"{portfolio_id}-{ticker}",
                instrument_id=ticker,
                symbol=ticker,
                market_value=float(weight * notional),
                asset_class=meta.pop("asset_class", "EQUITY"),
                **meta,
            )
        )
    return PortfolioSnapshot(portfolio_id, as_of_date, positions).validate()


# ─────────────────────────────────────────────────────────────
# Weights and exposures
# ─────────────────────────────────────────────────────────────

def base_value(snapshot: PortfolioSnapshot) -> float:
    """|V|, the denominator for weights; zero net value is rejected."""
    value = abs(snapshot.total_value)
    if value == 0.0:
        raise InputValidationError("market_value", "portfolio net market value is zero")
    return value


def position_weights(snapshot: PortfolioSnapshot) -> np.ndarray:
    """Market-value fractions MV_i / |V| in position order."""
    return snapshot.market_values() / base_value(snapshot)


def exposure_matrix(snapshot: PortfolioSnapshot, asset_ids: Sequence[str]) -> np.ndarray:
    """
    Map positions onto assets.

    Returns
    -------
    np.ndarray
        (P x N) matrix with E[p, a] = MV_p where position p holds asset a.
    """
    index = {a: i for i, a in enumerate(asset_ids)}
    E = np.zeros((len(snapshot.positions), len(asset_ids)))
    for p, position in enumerate(snapshot.positions):
        if position.instrument_id not in index:
            raise InputValidationError(
                "instrument_id", f"no market data for instrument {position.instrument_id!r}"
            )
        E[p, index[position.instrument_id]] = position.market_value
    return E


def asset_exposures(snapshot: PortfolioSnapshot, asset_ids: Sequence[str]) -> np.ndarray:
    """Net market value per asset (N,)."""
    return exposure_matrix(snapshot, asset_ids).sum(axis=0)


def align_returns(
    historical_returns: pd.DataFrame,
    asset_ids: Sequence[str],
    min_observations: int = 2,
) -> pd.DataFrame:
    """
    Select and order the return columns for ``asset_ids``, dropping days
    on which any selected asset is missing.

    Raises
    ------
    InputValidationError
        If an asset has no column.
    InsufficientDataError
        If fewer than ``min_observations`` complete days remain.
    """
    missing = [a for a in asset_ids if a not in historical_returns.columns]
    if missing:
        raise InputValidationError("historical_returns", f"no return series for {missing}")
    aligned = historical_returns.loc[:, list(asset_ids)].dropna()
    if len(aligned) < min_observations:
        raise InsufficientDataError(min_observations, len(aligned), "historical days")
    return aligned.astype(float)


def compute_portfolio_returns(returns: pd.DataFrame, weights: np.ndarray) -> pd.Series:
    """
    Portfolio returns as the weighted sum of asset returns, R_p = w^T R.

    Passing market-value exposures instead of weights yields daily P&L.
    """
    return pd.Series(returns.values @ weights, index=returns.index, name="portfolio_return")


# ─────────────────────────────────────────────────────────────
# Factor model estimation
# ─────────────────────────────────────────────────────────────

def build_risk_factor_model(
    historical_returns: pd.DataFrame,
    asset_ids: Optional[Sequence[str]] = None,
    method: str = "PEARSON",
) -> RiskFactorModel:
    """
    Estimate an annualized factor model from daily returns.

    Parameters
    ----------
    historical_returns : pd.DataFrame
        Daily returns (T x N), columns are asset ids.
    asset_ids : sequence of str, optional
        Subset and order of assets; defaults to all columns.
    method : str
        Correlation estimator, "PEARSON" or "SPEARMAN".

    Returns
    -------
    RiskFactorModel
        μ = mean · 252, σ = std · √252, pairwise correlation matrix.
    """
    if asset_ids is None:
        asset_ids = list(historical_returns.columns)
    aligned = align_returns(historical_returns, asset_ids)

    mu = aligned.mean().values * TRADING_DAYS_PER_YEAR
    sigma = aligned.std(ddof=1).values * np.sqrt(TRADING_DAYS_PER_YEAR)
    corr = correlation_matrix(aligned.values, method)

    return RiskFactorModel(
        asset_ids=tuple(str(a) for a in asset_ids),
        expected_returns=mu,
        volatilities=sigma,
        correlation_matrix=corr,
    )


def get_portfolio_summary(
    snapshot: PortfolioSnapshot, historical_returns: pd.DataFrame
) -> Dict[str, float]:
    """
    Summary statistics of the snapshot replayed over history.

    Skewness < 0 and excess kurtosis > 0 both indicate heavier-than-Gaussian
    left tails, the regime where Gaussian VaR underestimates risk.
    """
    asset_ids = snapshot.instrument_ids
    aligned = align_returns(historical_returns, asset_ids)
    weights = asset_exposures(snapshot, asset_ids) / base_value(snapshot)
    port_ret = compute_portfolio_returns(aligned, weights)

    ann_return = port_ret.mean() * TRADING_DAYS_PER_YEAR
    ann_vol = port_ret.std() * np.sqrt(TRADING_DAYS_PER_YEAR)
    sharpe = ann_return / ann_vol if ann_vol > 0 else 0.0

    losses = port_ret[port_ret < 0]
    downside_vol_daily = losses.std() if len(losses) > 1 else 0.0
    ann_downside_vol = downside_vol_daily * np.sqrt(TRADING_DAYS_PER_YEAR)
    sortino = ann_return / ann_downside_vol if ann_downside_vol > 0 else 0.0

    return {
        "portfolio_value": snapshot.total_value,
        "annualized_return": float(ann_return),
        "annualized_volatility": float(ann_vol),
        "sharpe_ratio": float(sharpe),
        "annualized_downside_vol": float(ann_downside_vol),
        "sortino_ratio": float(sortino),
        "skewness": float(scipy_stats.skew(port_ret.values)),
        "excess_kurtosis": float(scipy_stats.kurtosis(port_ret.values)),
        "num_observations": len(port_ret),
    }
