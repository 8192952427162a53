"""Shared pytest fixtures: a small multi-asset book and synthetic history."""

from datetime import date

import matplotlib

matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest

from portfolio_risk.models import PortfolioSnapshot, Position, RiskFactorModel

AS_OF = date(2024, 6, 28)
ASSET_IDS = ("SPY", "TLT", "GLD")

# Shape of an indefinite "correlation" matrix: unit diagonal, symmetric,
# but with a negative eigenvalue.
INDEFINITE_CORRELATION = np.array([
    [1.0, 0.9, -0.9],
    [0.9, 1.0, 0.9],
    [-0.9, 0.9, 1.0],
])


@pytest.fixture
def rng() -> np.random.Generator:
    """Deterministic random generator."""
    return np.random.default_rng(seed=42)


@pytest.fixture
def snapshot() -> PortfolioSnapshot:
    """Three-asset book: equity, government bond and gold."""
    return PortfolioSnapshot(
        portfolio_id="TEST",
        as_of_date=AS_OF,
        positions=(
            Position("P1", "SPY", "SPY", 500_000.0, "EQUITY", "BROAD_MARKET", "US"),
            Position("P2", "TLT", "TLT", 300_000.0, "FIXED_INCOME", "GOVERNMENT", "US"),
            Position("P3", "GLD", "GLD", 200_000.0, "COMMODITY", "PRECIOUS_METALS", "GLOBAL"),
        ),
    )


@pytest.fixture
def factor_model() -> RiskFactorModel:
    """Annualized drift, volatility and correlation for ASSET_IDS."""
    return RiskFactorModel(
        asset_ids=ASSET_IDS,
        expected_returns=np.array([0.08, 0.03, 0.05]),
        volatilities=np.array([0.18, 0.12, 0.15]),
        correlation_matrix=np.array([
            [1.0, -0.3, 0.1],
            [-0.3, 1.0, 0.2],
            [0.1, 0.2, 1.0],
        ]),
    )


@pytest.fixture
def historical_returns(rng: np.random.Generator, factor_model: RiskFactorModel) -> pd.DataFrame:
    """400 business days of daily returns drawn from ``factor_model``."""
    n_obs = 400
    mean = factor_model.expected_returns / 252
    cov = factor_model.daily_covariance()
    data = rng.multivariate_normal(mean, cov, size=n_obs)
    index = pd.bdate_range("2023-01-02", periods=n_obs)
    return pd.DataFrame(data, index=index, columns=list(ASSET_IDS))


@pytest.fixture
def prices(historical_returns: pd.DataFrame) -> pd.DataFrame:
    """Price paths compounding ``historical_returns`` from 100."""
    return 100.0 * (1.0 + historical_returns).cumprod()
