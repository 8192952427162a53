"""
Correlation Analysis Module
===========================
Correlation matrices at asset and category granularity, principal
components, concentration metrics and Euler risk contributions.

Mathematical Foundation:
    HHI:                  Σ g_i²,  g_i = |MV_i| / Σ|MV|
    Effective N:          1 / HHI
    Portfolio volatility: σ_p = sqrt(wᵀ D ρ D w)
    Diversification:      Σ |w_i| σ_i / σ_p
    Risk contribution:    RC_i = w_i (D ρ D w)_i / σ_p,   Σ RC_i = σ_p
    Variance explained:   λ_k / tr(ρ)
"""

from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import structlog

from portfolio_risk.config import TRADING_DAYS_PER_YEAR
from portfolio_risk.exceptions import InputValidationError
from portfolio_risk.linalg import symmetric_eigen_decomposition
from portfolio_risk.models import (
    CategoryConcentration,
    ComponentLoading,
    ConcentrationMetrics,
    CorrelationAnalysisRequest,
    CorrelationAnalysisResult,
    CorrelationMatrix,
    PortfolioSnapshot,
    PrincipalComponent,
    RiskContribution,
)
from portfolio_risk.portfolio import align_returns, asset_exposures, base_value
from portfolio_risk.statistics import correlation_matrix

logger = structlog.get_logger(__name__)

CATEGORY_FIELDS = ("asset_class", "sector", "geography", "currency")


# ─────────────────────────────────────────────────────────────
# Correlation matrices and PCA
# ─────────────────────────────────────────────────────────────

def build_correlation_matrix(
    labels: Sequence[str],
    returns: np.ndarray,
    method: str = "PEARSON",
    number_of_components: int = 5,
    rng: Optional[np.random.Generator] = None,
) -> CorrelationMatrix:
    """
    Correlation matrix of the columns of ``returns`` with its leading
    principal components.

    Parameters
    ----------
    labels : sequence of str
        One label per column.
    returns : np.ndarray
        Aligned return series (T x N).
    method : str
        "PEARSON" or "SPEARMAN".
    number_of_components : int
        Eigenpairs to extract; capped at N.
    rng : np.random.Generator, optional
        Start vectors for power iteration.

    Returns
    -------
    CorrelationMatrix
    """
    matrix = correlation_matrix(returns, method)
    decomposition = symmetric_eigen_decomposition(matrix, number_of_components, rng=rng)
    trace = float(np.trace(matrix))

    components = []
    cumulative = 0.0
    for k, eigenvalue in enumerate(decomposition.eigenvalues):
        explained = float(eigenvalue) / trace * 100.0 if trace > 0 else 0.0
        cumulative += explained
        vector = decomposition.eigenvectors[:, k]
        components.append(
            PrincipalComponent(
                component_number=k + 1,
                eigenvalue=float(eigenvalue),
                variance_explained=explained,
                cumulative_variance_explained=cumulative,
                loadings=tuple(
                    ComponentLoading(asset_id=label, loading=float(v))
                    for label, v in zip(labels, vector)
                ),
                converged=decomposition.converged[k],
            )
        )

    return CorrelationMatrix(
        assets=tuple(labels),
        matrix=matrix,
        eigenvalues=tuple(float(v) for v in decomposition.eigenvalues),
        principal_components=tuple(components),
    )


def category_returns(
    portfolio: PortfolioSnapshot,
    aligned: pd.DataFrame,
    field: str,
) -> pd.DataFrame:
    """
    Aggregate position returns by category, each position weighted by its
    share of the category's gross market value.
    """
    members: Dict[str, List[Tuple[str, float]]] = {}
    for position in portfolio.positions:
        members.setdefault(position.category(field), []).append(
            (position.instrument_id, abs(position.market_value))
        )

    columns = {}
    for category, holdings in members.items():
        gross = sum(v for _, v in holdings)
        if gross == 0:
            columns[category] = aligned[[h for h, _ in holdings]].mean(axis=1)
            continue
        series = sum(aligned[instrument] * (v / gross) for instrument, v in holdings)
        columns[category] = series
    return pd.DataFrame(columns, index=aligned.index)


# ─────────────────────────────────────────────────────────────
# Concentration
# ─────────────────────────────────────────────────────────────

def herfindahl_index(weights: np.ndarray) -> float:
    return float(np.sum(np.asarray(weights, dtype=float) ** 2))


def top_n_concentration(weights: np.ndarray, n: int) -> float:
    ordered = np.sort(np.asarray(weights, dtype=float))[::-1]
    return float(ordered[:n].sum() / ordered.sum())


def category_concentration(
    portfolio: PortfolioSnapshot, gross_weights: np.ndarray, field: str
) -> Tuple[CategoryConcentration, ...]:
    totals: Dict[str, float] = {}
    for position, g in zip(portfolio.positions, gross_weights):
        key = position.category(field)
        totals[key] = totals.get(key, 0.0) + float(g)
    ranked = sorted(totals.items(), key=lambda kv: kv[1], reverse=True)
    return tuple(
        CategoryConcentration(category=name, percentage=share * 100.0, rank=rank)
        for rank, (name, share) in enumerate(ranked, start=1)
    )


def concentration_metrics(portfolio: PortfolioSnapshot) -> ConcentrationMetrics:
    """
    Concentration from position weights alone.

    Raises
    ------
    InputValidationError
        If every position has zero market value.
    """
    gross = np.abs(portfolio.market_values())
    if gross.sum() == 0:
        raise InputValidationError("market_value", "portfolio gross market value is zero")
    g = gross / gross.sum()
    hhi = herfindahl_index(g)

    categories = {f: category_concentration(portfolio, g, f) for f in CATEGORY_FIELDS}
    return ConcentrationMetrics(
        herfindahl_index=hhi,
        top5_concentration=top_n_concentration(g, 5),
        top10_concentration=top_n_concentration(g, 10),
        effective_number_of_positions=1.0 / hhi,
        asset_class_concentration=categories["asset_class"],
        sector_concentration=categories["sector"],
        geography_concentration=categories["geography"],
        currency_concentration=categories["currency"],
    )


# ─────────────────────────────────────────────────────────────
# Volatility and risk contributions
# ─────────────────────────────────────────────────────────────

def portfolio_volatility(
    weights: np.ndarray, volatilities: np.ndarray, correlation: np.ndarray
) -> float:
    """
    σ_p = sqrt(wᵀ D ρ D w).

    Parameters
    ----------
    weights : np.ndarray
        Weight per asset (N,).
    volatilities : np.ndarray
        Volatility per asset (N,).
    correlation : np.ndarray
        Correlation matrix (N x N).
    """
    d = np.diag(volatilities)
    return float(np.sqrt(max(weights @ d @ correlation @ d @ weights, 0.0)))


def euler_risk_contributions(
    weights: np.ndarray, volatilities: np.ndarray, correlation: np.ndarray
) -> Tuple[np.ndarray, np.ndarray, float]:
    """
    Euler decomposition of portfolio volatility.

    Returns
    -------
    tuple
        (contributions, marginal risks, σ_p). Contributions sum to σ_p;
        both arrays are zero when σ_p is zero.
    """
    weights = np.asarray(weights, dtype=float)
    covariance = np.diag(volatilities) @ correlation @ np.diag(volatilities)
    sigma = portfolio_volatility(weights, volatilities, correlation)
    if sigma == 0.0:
        zeros = np.zeros_like(weights)
        return zeros, zeros.copy(), 0.0
    marginal = covariance @ weights / sigma
    return weights * marginal, marginal, sigma


# ─────────────────────────────────────────────────────────────
# Analyzer
# ─────────────────────────────────────────────────────────────

class CorrelationAnalyzer:
    """Correlation, concentration and risk-contribution analysis."""

    def analyze(
        self,
        portfolio: PortfolioSnapshot,
        historical_returns: pd.DataFrame,
        request: CorrelationAnalysisRequest = CorrelationAnalysisRequest(),
    ) -> CorrelationAnalysisResult:
        """
        Analyze a snapshot over aligned daily return history.

        Parameters
        ----------
        portfolio : PortfolioSnapshot
            Holdings.
        historical_returns : pd.DataFrame
            Daily returns, one column per instrument id.
        request : CorrelationAnalysisRequest
            Category matrices to build, PCA depth, estimator and seed.

        Returns
        -------
        CorrelationAnalysisResult
        """
        portfolio.validate()
        asset_ids = portfolio.instrument_ids
        aligned = align_returns(historical_returns, asset_ids)
        rng = np.random.default_rng(request.seed)
        k = request.number_of_components
        warnings: List[str] = []

        position_matrix = build_correlation_matrix(
            asset_ids, aligned.values, request.method, k, rng
        )

        category_matrices: Dict[str, Optional[CorrelationMatrix]] = {}
        for field, wanted in (
            ("asset_class", request.include_asset_classes),
            ("sector", request.include_sectors),
            ("geography", request.include_geographies),
        ):
            if not wanted:
                category_matrices[field] = None
                continue
            frame = category_returns(portfolio, aligned, field)
            category_matrices[field] = build_correlation_matrix(
                list(frame.columns), frame.values, request.method, k, rng
            )

        concentration = concentration_metrics(portfolio)

        weights = asset_exposures(portfolio, asset_ids) / base_value(portfolio)
        vols = aligned.std(ddof=1).values * np.sqrt(TRADING_DAYS_PER_YEAR)
        _, marginal, sigma = euler_risk_contributions(
            weights, vols, position_matrix.matrix
        )

        if sigma > 0:
            diversification_ratio = float(np.abs(weights) @ vols / sigma)
        else:
            diversification_ratio = None
            warnings.append("portfolio volatility is zero; diversification ratio undefined")

        position_weights = portfolio.market_values() / base_value(portfolio)
        risk_contributions = []
        for position, w in zip(portfolio.positions, position_weights):
            a = asset_ids.index(position.instrument_id)
            rc = float(w * marginal[a])
            risk_contributions.append(
                RiskContribution(
                    position_id=position.id,
                    symbol=position.symbol,
                    risk_contribution=rc,
                    percent_contribution=rc / sigma * 100.0 if sigma > 0 else 0.0,
                    marginal_risk=float(marginal[a]),
                )
            )

        for pc in position_matrix.principal_components:
            if not pc.converged:
                warnings.append(f"principal component {pc.component_number} did not converge")

        logger.info(
            "correlation_analysis_completed",
            portfolio_id=portfolio.portfolio_id,
            assets=len(asset_ids),
            lookback=len(aligned),
            portfolio_volatility=round(sigma, 6),
            hhi=round(concentration.herfindahl_index, 6),
        )

        return CorrelationAnalysisResult(
            portfolio_id=portfolio.portfolio_id,
            as_of_date=portfolio.as_of_date,
            lookback_period=len(aligned),
            position_correlations=position_matrix,
            asset_class_correlations=category_matrices["asset_class"],
            sector_correlations=category_matrices["sector"],
            geography_correlations=category_matrices["geography"],
            concentration_metrics=concentration,
            portfolio_volatility=sigma,
            diversification_ratio=diversification_ratio,
            effective_number_of_bets=1.0 / float(np.sum(position_weights ** 2)),
            risk_contributions=tuple(risk_contributions),
            warnings=tuple(warnings),
        )
