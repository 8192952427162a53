"""Tests for shock propagation, scenario risk and the stress summary."""

from datetime import date

import numpy as np
import pytest

from portfolio_risk.exceptions import EmptyPortfolioError, InputValidationError
from portfolio_risk.models import (
    FactorShock,
    FactorType,
    PortfolioSnapshot,
    Position,
    PositionSensitivity,
    RiskFactorModel,
    ShockType,
    StressScenario,
    StressTestRequest,
)
from portfolio_risk.stress_testing import (
    HISTORICAL_SCENARIOS,
    StressTestEngine,
    apply_correlation_stress,
    apply_volatility_shock,
    correlation_changes,
    position_sensitivity,
    shock_impact,
)

from conftest import AS_OF


def equity_crash(pct: float = -20.0) -> StressScenario:
    return StressScenario(
        id="crash",
        name="Equity crash",
        factor_shocks=(FactorShock(FactorType.EQUITY_INDEX, "S&P 500", ShockType.RELATIVE, pct),),
    )


def rate_shock(bp: float = 100.0) -> StressScenario:
    return StressScenario(
        id="rates",
        name="Rates up",
        factor_shocks=(FactorShock(FactorType.INTEREST_RATE, "10Y", ShockType.ABSOLUTE, bp),),
    )


@pytest.fixture
def engine() -> StressTestEngine:
    return StressTestEngine()


@pytest.fixture
def single_equity():
    book = PortfolioSnapshot(
        "EQ", AS_OF, (Position("P1", "SPY", "SPY", 1_000_000.0, "EQUITY"),)
    )
    model = RiskFactorModel(("SPY",), np.array([0.08]), np.array([0.18]), np.eye(1))
    return book, model


# ---------------------------------------------------------------------------
# Sensitivities
# ---------------------------------------------------------------------------


class TestSensitivities:
    def test_equity_beta_default_and_override(self) -> None:
        eq = Position("P", "X", "X", 100.0, "EQUITY")
        shock = FactorShock(FactorType.EQUITY_INDEX, "idx", ShockType.RELATIVE, -10)
        assert position_sensitivity(eq, shock) == 1.0
        assert position_sensitivity(eq, shock, PositionSensitivity(beta=1.4)) == 1.4

    def test_equity_rate_sensitivity(self) -> None:
        eq = Position("P", "X", "X", 100.0, "EQUITY")
        shock = FactorShock(FactorType.INTEREST_RATE, "10Y", ShockType.ABSOLUTE, 100)
        assert position_sensitivity(eq, shock) == pytest.approx(-0.1)

    def test_bond_duration(self) -> None:
        bond = Position("P", "X", "X", 1_000_000.0, "FIXED_INCOME")
        shock = FactorShock(FactorType.INTEREST_RATE, "10Y", ShockType.ABSOLUTE, 100)
        sensitivity = position_sensitivity(bond, shock)
        assert sensitivity == -7.5
        assert shock_impact(1_000_000.0, shock, sensitivity) == pytest.approx(-75_000.0)

    def test_absolute_shock_scales_with_position_size(self) -> None:
        rates = FactorShock(FactorType.INTEREST_RATE, "10Y", ShockType.ABSOLUTE, 100)
        vol = FactorShock(FactorType.VOLATILITY, "VIX", ShockType.ABSOLUTE, 10)
        assert shock_impact(2_000_000.0, rates, -7.5) == pytest.approx(-150_000.0)
        assert shock_impact(2_000_000.0, rates, -7.5) == pytest.approx(
            2 * shock_impact(1_000_000.0, rates, -7.5)
        )
        assert shock_impact(500.0, vol, 0.15) == pytest.approx(0.15 * 500.0 * 0.01 * 10)

    def test_credit_needs_rating(self) -> None:
        shock = FactorShock(FactorType.CREDIT_SPREAD, "IG", ShockType.ABSOLUTE, 200)
        unrated = Position("P", "X", "X", 100.0, "FIXED_INCOME")
        rated = Position("P", "X", "X", 100.0, "FIXED_INCOME", credit_rating="BBB")
        assert position_sensitivity(unrated, shock) == 0.0
        assert position_sensitivity(rated, shock) == -5.0

    def test_currency_exposure(self) -> None:
        shock = FactorShock(FactorType.CURRENCY, "EURUSD", ShockType.RELATIVE, 10, currency="EUR")
        eur = Position("P", "X", "X", 100.0, "EQUITY", currency="EUR")
        usd = Position("P", "X", "X", 100.0, "EQUITY")
        gbp = Position("P", "X", "X", 100.0, "EQUITY", currency="GBP")
        assert position_sensitivity(eur, shock) == 1.0
        assert position_sensitivity(usd, shock) == 0.0
        assert position_sensitivity(gbp, shock) == 0.0

    def test_commodity_exposure(self) -> None:
        shock = FactorShock(FactorType.COMMODITY, "WTI", ShockType.RELATIVE, -30)
        gold = Position("P", "X", "X", 100.0, "COMMODITY")
        energy = Position("P", "X", "X", 100.0, "EQUITY", sector="ENERGY")
        tech = Position("P", "X", "X", 100.0, "EQUITY", sector="TECHNOLOGY")
        assert position_sensitivity(gold, shock) == 0.5
        assert position_sensitivity(energy, shock) == 0.5
        assert position_sensitivity(tech, shock) == 0.0

    def test_option_vega(self) -> None:
        shock = FactorShock(FactorType.VOLATILITY, "VIX", ShockType.ABSOLUTE, 10)
        option = Position("P", "X", "X", 1_000.0, "DERIVATIVE", instrument_type="OPTION")
        future = Position("P", "X", "X", 1_000.0, "DERIVATIVE", instrument_type="FUTURE")
        assert position_sensitivity(option, shock) == 0.15
        assert position_sensitivity(future, shock) == 0.0
        assert shock_impact(1_000.0, shock, 0.15) == pytest.approx(15.0)

    def test_unmapped_pair_is_zero(self) -> None:
        cash = Position("P", "X", "X", 100.0, "CASH")
        shock = FactorShock(FactorType.EQUITY_INDEX, "idx", ShockType.RELATIVE, -50)
        assert position_sensitivity(cash, shock) == 0.0


# ---------------------------------------------------------------------------
# Stressed risk parameters
# ---------------------------------------------------------------------------


class TestStressedParameters:
    def test_volatility_multiplier(self) -> None:
        shocks = [
            FactorShock(FactorType.EQUITY_INDEX, "a", ShockType.RELATIVE, -30),
            FactorShock(FactorType.VOLATILITY, "b", ShockType.ABSOLUTE, 20),
        ]
        out = apply_volatility_shock(np.array([0.1, 0.2]), shocks)
        assert np.allclose(out, np.array([0.1, 0.2]) * 1.05)

    def test_correlation_uplift_is_capped(self) -> None:
        base = np.array([[1.0, 0.9, -0.5], [0.9, 1.0, 0.0], [-0.5, 0.0, 1.0]])
        stressed = apply_correlation_stress(base)
        assert stressed[0, 1] == 1.0
        assert stressed[0, 2] == pytest.approx(-0.3)
        assert stressed[1, 2] == pytest.approx(0.2)
        assert np.array_equal(np.diag(stressed), np.ones(3))

    def test_only_significant_changes_reported(self) -> None:
        base = np.array([[1.0, 0.95], [0.95, 1.0]])
        stressed = apply_correlation_stress(base)
        assert correlation_changes(["A", "B"], base, stressed) == []
        changes = correlation_changes(["A", "B"], np.eye(2), apply_correlation_stress(np.eye(2)))
        assert len(changes) == 1
        assert changes[0].correlation_change == pytest.approx(0.2)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class TestStressTestEngine:
    def test_beta_one_equity_loses_exactly_the_shock(self, engine, single_equity) -> None:
        book, model = single_equity
        result = engine.execute_stress_test(book, model, [equity_crash(-20.0)])
        scenario = result.scenario_results[0]
        impact = scenario.position_impacts[0]
        assert impact.absolute_change == pytest.approx(-200_000.0, abs=1e-9)
        assert impact.percent_change == pytest.approx(-20.0, abs=1e-12)
        assert scenario.portfolio_change_percent == pytest.approx(-20.0, abs=1e-12)
        assert scenario.portfolio_value == pytest.approx(800_000.0)
        assert impact.contribution_to_portfolio_change == pytest.approx(100.0)

    def test_beta_override_from_request(self, engine, single_equity) -> None:
        book, model = single_equity
        request = StressTestRequest(sensitivities={"P1": PositionSensitivity(beta=1.5)})
        result = engine.execute_stress_test(book, model, [equity_crash(-20.0)], request)
        assert result.scenario_results[0].portfolio_change == pytest.approx(-300_000.0)

    def test_shocks_add_linearly(self, engine, snapshot, factor_model) -> None:
        combined = StressScenario(
            id="both",
            name="Both",
            factor_shocks=equity_crash().factor_shocks + rate_shock().factor_shocks,
        )
        results = engine.execute_stress_test(
            snapshot, factor_model, [equity_crash(), rate_shock(), combined]
        ).scenario_results
        assert results[2].portfolio_change == pytest.approx(
            results[0].portfolio_change + results[1].portfolio_change
        )

    def test_contributions_sum_to_hundred(self, engine, snapshot, factor_model) -> None:
        result = engine.execute_stress_test(snapshot, factor_model, [rate_shock()])
        impacts = result.scenario_results[0].position_impacts
        assert sum(i.contribution_to_portfolio_change for i in impacts) == pytest.approx(100.0)
        gold = next(i for i in impacts if i.instrument_id == "GLD")
        assert gold.absolute_change == 0.0

    def test_summary_over_historical_library(self, engine, snapshot, factor_model) -> None:
        result = engine.execute_stress_test(
            snapshot,
            factor_model,
            request=StressTestRequest(include_historical_scenarios=True),
        )
        changes = [r.portfolio_change for r in result.scenario_results]
        assert len(result.scenario_results) == len(HISTORICAL_SCENARIOS)
        assert result.worst_case_scenario.portfolio_change == min(changes)
        assert result.best_case_scenario.portfolio_change == max(changes)
        assert result.average_impact == pytest.approx(np.mean(changes))
        assert result.stressed_var == pytest.approx(abs(min(changes)))
        assert result.max_drawdown == result.stressed_var
        assert result.stressed_volatility >= 0.0

    def test_scenario_order_is_preserved(self, engine, snapshot, factor_model) -> None:
        scenarios = [equity_crash(-10.0), rate_shock(50.0)]
        result = engine.execute_stress_test(
            snapshot, factor_model, scenarios, StressTestRequest(include_historical_scenarios=True)
        )
        ids = [r.scenario_id for r in result.scenario_results]
        assert ids == ["crash", "rates"] + [s.id for s in HISTORICAL_SCENARIOS]

    def test_scenario_risk_is_stressed(self, engine, snapshot, factor_model) -> None:
        result = engine.execute_stress_test(snapshot, factor_model, [rate_shock(10.0)])
        scenario = result.scenario_results[0]
        assert scenario.var_under_scenario > 0.0
        assert scenario.volatility_under_scenario > 0.0
        assert all(abs(c.correlation_change) > 0.1 for c in scenario.correlation_changes)

    def test_factor_sensitivities_sorted(self, engine, snapshot, factor_model) -> None:
        result = engine.execute_stress_test(
            snapshot,
            factor_model,
            [equity_crash(-10.0), equity_crash(-30.0), rate_shock(100.0)],
        )
        contributions = [f.contribution for f in result.factor_sensitivities]
        assert contributions == sorted(contributions, reverse=True)
        equity = next(f for f in result.factor_sensitivities if f.factor_type is FactorType.EQUITY_INDEX)
        # Equity moves only the 500k SPY position: 1% of shock costs 5,000.
        assert equity.sensitivity == pytest.approx(5_000.0)

    def test_single_shock_size_uses_origin_slope(self, engine, single_equity) -> None:
        book, model = single_equity
        result = engine.execute_stress_test(book, model, [equity_crash(-20.0)])
        (factor,) = result.factor_sensitivities
        assert factor.sensitivity == pytest.approx(10_000.0)
        assert factor.intercept == 0.0
        assert factor.percent_contribution == pytest.approx(100.0)

    def test_no_scenarios_raises(self, engine, snapshot, factor_model) -> None:
        with pytest.raises(InputValidationError):
            engine.execute_stress_test(snapshot, factor_model, [])

    def test_empty_portfolio_raises(self, engine, factor_model) -> None:
        with pytest.raises(EmptyPortfolioError):
            engine.execute_stress_test(
                PortfolioSnapshot("EMPTY", date(2024, 1, 2), ()), factor_model, [equity_crash()]
            )
