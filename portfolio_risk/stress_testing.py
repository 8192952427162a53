"""
Stress Testing Module
=====================
Propagates named factor shocks to positions through first-order
sensitivities, then summarizes scenario losses and attributes them to
factors.

Shock propagation:
    Relative shock (percent):   ΔV = MV · (s / 100) · β
    Absolute shock:             ΔV = β · MV · u · s
        u = 1e-4 for INTEREST_RATE / CREDIT_SPREAD (basis points)
        u = 1e-2 otherwise (points)
    Shocks on one position add linearly; there are no cross terms.

Scenario risk:
    Volatility shock:    σ_s = σ · (1 + Σ|s|/100 · 0.1)
    Correlation stress:  ρ_s = min(ρ + 0.2, 1) off the diagonal, repaired
                         for factorization when needed
"""

import math
from concurrent.futures import ThreadPoolExecutor
from datetime import date
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import structlog

from portfolio_risk.config import (
    BASE_CURRENCY,
    BASIS_POINT,
    COMMODITY_SENSITIVITY,
    DEFAULT_BETA,
    DEFAULT_CREDIT_DURATION,
    DEFAULT_DURATION,
    DEFAULT_OPTION_VEGA,
    EQUITY_RATE_DURATION,
    SCENARIO_VOLATILITY_SCALE,
    SIGNIFICANT_CORRELATION_CHANGE,
    STRESS_CORRELATION_UPLIFT,
    TRADING_DAYS_PER_YEAR,
)
from portfolio_risk.exceptions import InputValidationError, NumericalInstabilityError
from portfolio_risk.linalg import regularized_correlation
from portfolio_risk.models import (
    CorrelationChange,
    FactorSensitivity,
    FactorShock,
    FactorType,
    HistoricalPeriod,
    PortfolioSnapshot,
    Position,
    PositionImpact,
    PositionSensitivity,
    RiskFactorModel,
    ScenarioResult,
    ShockType,
    StressScenario,
    StressTestRequest,
    StressTestResult,
)
from portfolio_risk.portfolio import exposure_matrix
from portfolio_risk.risk_metrics import z_score
from portfolio_risk.statistics import linear_regression

logger = structlog.get_logger(__name__)


# ─────────────────────────────────────────────────────────────
# Historical scenario library
# ─────────────────────────────────────────────────────────────
HISTORICAL_SCENARIOS: Tuple[StressScenario, ...] = (
    StressScenario(
        id="covid_2020",
        name="COVID-19 Market Crash (March 2020)",
        description="Market conditions at the onset of the COVID-19 pandemic",
        scenario_type="HISTORICAL",
        probability=0.05,
        factor_shocks=(
            FactorShock(FactorType.EQUITY_INDEX, "S&P 500", ShockType.RELATIVE, -34, region="US"),
            FactorShock(FactorType.INTEREST_RATE, "10Y Treasury", ShockType.ABSOLUTE, -150, maturity="10Y"),
            FactorShock(FactorType.CREDIT_SPREAD, "Investment Grade Credit", ShockType.ABSOLUTE, 200),
            FactorShock(FactorType.VOLATILITY, "VIX", ShockType.ABSOLUTE, 50),
        ),
        historical_period=HistoricalPeriod(date(2020, 2, 19), date(2020, 3, 23), "COVID-19 Pandemic"),
    ),
    StressScenario(
        id="gfc_2008",
        name="Global Financial Crisis (2008)",
        description="Credit crunch and equity collapse of the 2008 financial crisis",
        scenario_type="HISTORICAL",
        probability=0.02,
        factor_shocks=(
            FactorShock(FactorType.EQUITY_INDEX, "S&P 500", ShockType.RELATIVE, -57, region="US"),
            FactorShock(FactorType.CREDIT_SPREAD, "High Yield Credit", ShockType.ABSOLUTE, 1500),
            FactorShock(FactorType.EQUITY_INDEX, "Real Estate", ShockType.RELATIVE, -70),
        ),
        historical_period=HistoricalPeriod(date(2007, 10, 9), date(2009, 3, 9), "Global Financial Crisis"),
    ),
    StressScenario(
        id="dotcom_2000",
        name="Dot-Com Crash (2000-2002)",
        description="Collapse of technology valuations after the dot-com bubble",
        scenario_type="HISTORICAL",
        probability=0.03,
        factor_shocks=(
            FactorShock(FactorType.EQUITY_INDEX, "NASDAQ", ShockType.RELATIVE, -78, region="US"),
            FactorShock(FactorType.EQUITY_INDEX, "Technology Sector", ShockType.RELATIVE, -80),
        ),
        historical_period=HistoricalPeriod(date(2000, 3, 10), date(2002, 10, 9), "Dot-Com Crash"),
    ),
)


# ─────────────────────────────────────────────────────────────
# Sensitivities
# ─────────────────────────────────────────────────────────────
SensitivityFn = Callable[[Position, FactorShock, PositionSensitivity], float]


def _or_default(value: Optional[float], default: float) -> float:
    return default if value is None else value


def _equity_beta(position, shock, overrides) -> float:
    return _or_default(overrides.beta, DEFAULT_BETA)


def _equity_discount_rate(position, shock, overrides) -> float:
    return -EQUITY_RATE_DURATION


def _bond_duration(position, shock, overrides) -> float:
    return -_or_default(overrides.duration, DEFAULT_DURATION)


def _credit_duration(position, shock, overrides) -> float:
    if not position.credit_rating:
        return 0.0
    return -_or_default(overrides.credit_duration, DEFAULT_CREDIT_DURATION)


def _currency_exposure(position, shock, overrides) -> float:
    currency = (position.currency or BASE_CURRENCY).upper()
    if currency != BASE_CURRENCY and shock.currency and currency == shock.currency.upper():
        return 1.0
    return 0.0


def _commodity_exposure(position, shock, overrides) -> float:
    if (
        position.category("asset_class").upper() == "COMMODITY"
        or position.category("sector").upper() == "ENERGY"
    ):
        return COMMODITY_SENSITIVITY
    return 0.0


def _option_vega(position, shock, overrides) -> float:
    if (position.instrument_type or "").upper() != "OPTION":
        return 0.0
    return _or_default(overrides.vega, DEFAULT_OPTION_VEGA)


# (asset class, factor) lookups; asset class None applies to every position.
SENSITIVITY_REGISTRY: Dict[Tuple[Optional[str], FactorType], SensitivityFn] = {
    ("EQUITY", FactorType.EQUITY_INDEX): _equity_beta,
    ("EQUITY", FactorType.INTEREST_RATE): _equity_discount_rate,
    ("FIXED_INCOME", FactorType.INTEREST_RATE): _bond_duration,
    ("FIXED_INCOME", FactorType.CREDIT_SPREAD): _credit_duration,
    (None, FactorType.CURRENCY): _currency_exposure,
    (None, FactorType.COMMODITY): _commodity_exposure,
    (None, FactorType.VOLATILITY): _option_vega,
}


def position_sensitivity(
    position: Position,
    shock: FactorShock,
    overrides: PositionSensitivity = PositionSensitivity(),
) -> float:
    """Sensitivity of ``position`` to ``shock``; 0 when nothing applies."""
    asset_class = position.category("asset_class").upper()
    fn = SENSITIVITY_REGISTRY.get((asset_class, shock.factor_type))
    if fn is None:
        fn = SENSITIVITY_REGISTRY.get((None, shock.factor_type))
    if fn is None:
        return 0.0
    return float(fn(position, shock, overrides))


def shock_unit(factor_type: FactorType) -> float:
    if factor_type in (FactorType.INTEREST_RATE, FactorType.CREDIT_SPREAD):
        return BASIS_POINT
    return 0.01


def shock_impact(current_value: float, shock: FactorShock, sensitivity: float) -> float:
    """
    Value change of one position under one shock.

    Parameters
    ----------
    current_value : float
        Position market value.
    shock : FactorShock
        Relative shocks are percentages; absolute shocks are in basis
        points for rates and spreads, points otherwise.
    sensitivity : float
        Elasticity from ``position_sensitivity``.

    Notes
    -----
    Absolute shocks are applied as ``sensitivity · MV · unit · shock``
    rather than a bare ``sensitivity · shock``, so a duration of 7.5 on a
    +100bp move costs 7.5% of the position's value instead of a fixed
    750 currency units independent of its size.
    """
    if shock.shock_type is ShockType.RELATIVE:
        return current_value * (shock.shock_value / 100.0) * sensitivity
    return sensitivity * current_value * shock_unit(shock.factor_type) * shock.shock_value


# ─────────────────────────────────────────────────────────────
# Stressed risk parameters
# ─────────────────────────────────────────────────────────────

def apply_volatility_shock(volatilities: np.ndarray, factor_shocks: Sequence[FactorShock]) -> np.ndarray:
    """
    Scale volatilities by the aggregate shock magnitude.

    Mathematical Definition:
        σ_s = σ · (1 + Σ_k |s_k| / 100 · 0.1)
    """
    multiplier = 1.0 + sum(abs(s.shock_value) / 100.0 for s in factor_shocks) * SCENARIO_VOLATILITY_SCALE
    return np.asarray(volatilities, dtype=float) * multiplier


def apply_correlation_stress(
    correlation: np.ndarray,
    uplift: float = STRESS_CORRELATION_UPLIFT,
) -> np.ndarray:
    """
    Raise every off-diagonal correlation by ``uplift``, capped at 1.

    Parameters
    ----------
    correlation : np.ndarray
        Base correlation matrix (N x N).
    uplift : float
        Additive stress (default: 0.2).

    Returns
    -------
    np.ndarray
        Stressed correlation matrix; may be singular once entries hit the
        cap, which ``linalg.regularized_correlation`` repairs.
    """
    stressed = np.minimum(np.asarray(correlation, dtype=float) + uplift, 1.0)
    np.fill_diagonal(stressed, 1.0)
    return stressed


def correlation_changes(
    asset_ids: Sequence[str],
    base: np.ndarray,
    stressed: np.ndarray,
    threshold: float = SIGNIFICANT_CORRELATION_CHANGE,
) -> List[CorrelationChange]:
    """Pairs whose correlation moved by more than ``threshold``."""
    changes = []
    n = len(asset_ids)
    for i in range(n):
        for j in range(i + 1, n):
            delta = float(stressed[i, j] - base[i, j])
            if abs(delta) > threshold:
                changes.append(
                    CorrelationChange(
                        asset1=asset_ids[i],
                        asset2=asset_ids[j],
                        base_correlation=float(base[i, j]),
                        stressed_correlation=float(stressed[i, j]),
                        correlation_change=delta,
                    )
                )
    return changes


# ─────────────────────────────────────────────────────────────
# Engine
# ─────────────────────────────────────────────────────────────

class StressTestEngine:
    """Runs factor-shock scenarios against a portfolio snapshot."""

    def execute_stress_test(
        self,
        portfolio: PortfolioSnapshot,
        factor_model: RiskFactorModel,
        scenarios: Sequence[StressScenario] = (),
        request: StressTestRequest = StressTestRequest(),
    ) -> StressTestResult:
        """
        Run every scenario and summarize the results.

        Parameters
        ----------
        portfolio : PortfolioSnapshot
            Holdings to shock.
        factor_model : RiskFactorModel
            Base volatilities and correlations for scenario VaR.
        scenarios : sequence of StressScenario
            User scenarios; the historical library is appended when
            ``request.include_historical_scenarios`` is set.
        request : StressTestRequest
            Confidence level, per-position sensitivity overrides, workers.

        Returns
        -------
        StressTestResult

        Raises
        ------
        EmptyPortfolioError
            If the snapshot has no positions.
        InputValidationError
            If there is no scenario to run.
        """
        portfolio.validate()
        all_scenarios = list(scenarios)
        if request.include_historical_scenarios:
            all_scenarios.extend(HISTORICAL_SCENARIOS)
        if not all_scenarios:
            raise InputValidationError("scenarios", "no stress scenarios to run")

        asset_ids = portfolio.instrument_ids
        model = factor_model.subset(asset_ids)

        workers = max(1, min(request.max_workers, len(all_scenarios)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            results = list(
                executor.map(
                    lambda s: self.execute_scenario(portfolio, model, s, request),
                    all_scenarios,
                )
            )

        worst = min(results, key=lambda r: r.portfolio_change)
        best = max(results, key=lambda r: r.portfolio_change)
        changes = np.array([r.portfolio_change for r in results])
        change_pct = np.array([r.portfolio_change_percent for r in results]) / 100.0

        logger.info(
            "stress_test_completed",
            portfolio_id=portfolio.portfolio_id,
            scenarios=len(results),
            worst_case=worst.scenario_id,
            worst_change_percent=round(worst.portfolio_change_percent, 4),
        )

        return StressTestResult(
            portfolio_id=portfolio.portfolio_id,
            as_of_date=portfolio.as_of_date,
            scenario_results=tuple(results),
            worst_case_scenario=worst,
            best_case_scenario=best,
            average_impact=float(changes.mean()),
            stressed_var=abs(worst.portfolio_change),
            stressed_volatility=float(change_pct.std() * 100.0),
            max_drawdown=abs(worst.portfolio_change),
            factor_sensitivities=tuple(self.factor_sensitivities(all_scenarios, results)),
        )

    def position_impact(
        self,
        position: Position,
        factor_shocks: Sequence[FactorShock],
        overrides: PositionSensitivity = PositionSensitivity(),
    ) -> Tuple[float, float]:
        """(current value, summed first-order change) for one position."""
        current = position.market_value
        change = sum(
            shock_impact(current, shock, position_sensitivity(position, shock, overrides))
            for shock in factor_shocks
        )
        return current, float(change)

    def execute_scenario(
        self,
        portfolio: PortfolioSnapshot,
        factor_model: RiskFactorModel,
        scenario: StressScenario,
        request: StressTestRequest = StressTestRequest(),
    ) -> ScenarioResult:
        """Apply one scenario; ``factor_model`` must cover the portfolio's assets."""
        base_value = portfolio.total_value

        raw = []
        for position in portfolio.positions:
            overrides = request.sensitivities.get(position.id, PositionSensitivity())
            raw.append(self.position_impact(position, scenario.factor_shocks, overrides))
        total_change = float(sum(change for _, change in raw))

        impacts = []
        for position, (current, change) in zip(portfolio.positions, raw):
            impacts.append(
                PositionImpact(
                    position_id=position.id,
                    instrument_id=position.instrument_id,
                    symbol=position.symbol,
                    current_value=current,
                    stressed_value=current + change,
                    absolute_change=change,
                    percent_change=change / current * 100.0 if current != 0 else 0.0,
                    contribution_to_portfolio_change=(
                        change / total_change * 100.0 if total_change != 0 else 0.0
                    ),
                )
            )

        stressed_value = base_value + total_change
        var_s, vol_s, stressed_corr = self._scenario_risk(
            portfolio, factor_model, scenario, impacts, stressed_value, request.confidence_level
        )

        return ScenarioResult(
            scenario_id=scenario.id,
            scenario_name=scenario.name,
            portfolio_value=stressed_value,
            portfolio_change=total_change,
            portfolio_change_percent=(
                total_change / abs(base_value) * 100.0 if base_value != 0 else 0.0
            ),
            position_impacts=tuple(impacts),
            var_under_scenario=var_s,
            volatility_under_scenario=vol_s,
            correlation_changes=tuple(
                correlation_changes(
                    factor_model.asset_ids, factor_model.correlation_matrix, stressed_corr
                )
            ),
        )

    def _scenario_risk(
        self,
        portfolio: PortfolioSnapshot,
        factor_model: RiskFactorModel,
        scenario: StressScenario,
        impacts: Sequence[PositionImpact],
        stressed_value: float,
        confidence_level: float,
    ) -> Tuple[float, float, np.ndarray]:
        """
        Daily VaR and annualized volatility of the stressed book under
        shocked volatilities and stressed correlations.
        """
        stressed_corr = apply_correlation_stress(factor_model.correlation_matrix)
        effective_corr = regularized_correlation(stressed_corr)
        vols = apply_volatility_shock(factor_model.volatilities, scenario.factor_shocks)
        annual_cov = np.diag(vols) @ effective_corr @ np.diag(vols)

        shares = exposure_matrix(portfolio, factor_model.asset_ids)
        nonzero = np.array([i.current_value != 0 for i in impacts])
        growth = np.array([
            i.stressed_value / i.current_value if i.current_value != 0 else 0.0 for i in impacts
        ])
        stressed_exposures = (shares[nonzero] * growth[nonzero, None]).sum(axis=0)

        annual_std = math.sqrt(max(float(stressed_exposures @ annual_cov @ stressed_exposures), 0.0))
        if not math.isfinite(annual_std):
            raise NumericalInstabilityError("scenario volatility")

        daily_std = annual_std / math.sqrt(TRADING_DAYS_PER_YEAR)
        var_s = z_score(confidence_level) * daily_std
        vol_s = annual_std / abs(stressed_value) if stressed_value != 0 else 0.0
        return var_s, vol_s, stressed_corr

    def factor_sensitivities(
        self,
        scenarios: Sequence[StressScenario],
        results: Sequence[ScenarioResult],
    ) -> List[FactorSensitivity]:
        """
        Regress each factor's shock sizes against portfolio changes across
        scenarios and rank factors by the absolute loss they accompany.
        """
        collected: Dict[str, Dict[str, object]] = {}
        for scenario, result in zip(scenarios, results):
            for shock in scenario.factor_shocks:
                entry = collected.setdefault(
                    shock.key, {"type": shock.factor_type, "shocks": [], "impacts": []}
                )
                entry["shocks"].append(shock.shock_value)
                entry["impacts"].append(result.portfolio_change)

        total_abs = sum(abs(r.portfolio_change) for r in results)
        out = []
        for key, entry in collected.items():
            x = np.array(entry["shocks"], dtype=float)
            y = np.array(entry["impacts"], dtype=float)
            try:
                fit = linear_regression(x, y)
                slope, intercept = fit.slope, fit.intercept
            except NumericalInstabilityError:
                # One distinct shock size: slope through the origin.
                xx = float(x @ x)
                slope, intercept = (float(x @ y) / xx if xx > 0 else 0.0), 0.0

            contribution = float(np.abs(y).sum())
            out.append(
                FactorSensitivity(
                    factor_name=key,
                    factor_type=entry["type"],
                    sensitivity=slope,
                    intercept=intercept,
                    contribution=contribution,
                    percent_contribution=contribution / total_abs * 100.0 if total_abs > 0 else 0.0,
                )
            )
        return sorted(out, key=lambda f: f.contribution, reverse=True)
