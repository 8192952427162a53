"""Tests for the Monte Carlo engine and its distribution reductions."""

from datetime import date

import numpy as np
import pytest

from portfolio_risk.exceptions import InsufficientDataError, InsufficientTrialsError
from portfolio_risk.models import (
    MonteCarloRequest,
    PortfolioSnapshot,
    Position,
    RiskFactorModel,
    TimeHorizon,
)
from portfolio_risk.monte_carlo import (
    MonteCarloEngine,
    batch_means_convergence,
    compute_mc_expected_shortfall,
    compute_mc_var,
    summarize_returns,
)

from conftest import INDEFINITE_CORRELATION


@pytest.fixture
def engine() -> MonteCarloEngine:
    return MonteCarloEngine()


class TestReductions:
    def test_var_and_es_on_known_sample(self) -> None:
        returns = np.arange(-50, 50) / 1000.0  # -0.050 .. 0.049
        assert compute_mc_var(returns, 0.95) == pytest.approx(0.045)
        assert compute_mc_var(returns, 0.99) == pytest.approx(0.049)
        assert compute_mc_expected_shortfall(returns, 0.95) == pytest.approx(0.0475)

    def test_var_floored_at_zero(self) -> None:
        assert compute_mc_var(np.linspace(0.01, 0.02, 100), 0.99) == 0.0

    def test_summary_fields(self, rng) -> None:
        returns = rng.normal(0.001, 0.01, size=10_000)
        stats = summarize_returns(returns)
        assert stats["cvar95"] >= stats["var95"]
        assert stats["cvar99"] >= stats["var99"]
        assert stats["max_drawdown"] == pytest.approx(abs(returns.min()))
        assert stats["probability_of_loss"] == pytest.approx(np.mean(returns < 0) * 100)
        values = [p.value for p in stats["percentiles"]]
        assert [p.percentile for p in stats["percentiles"]] == [1, 5, 10, 25, 50, 75, 90, 95, 99]
        assert values == sorted(values)

    def test_recovery_is_zero_without_positive_drift(self) -> None:
        stats = summarize_returns(np.array([-0.02, -0.01, 0.0, 0.01]))
        assert stats["time_to_recovery"] == 0.0


class TestBatchMeans:
    def test_constant_returns_converge(self) -> None:
        result = batch_means_convergence(np.full(100, 0.01))
        assert result.has_converged is True
        assert result.standard_error == pytest.approx(0.0)
        assert result.convergence_threshold == pytest.approx(1e-4)
        assert len(result.batch_means) == 10

    def test_confidence_interval_brackets_mean(self, rng) -> None:
        returns = rng.normal(0.0005, 0.01, size=5_000)
        result = batch_means_convergence(returns)
        low, high = result.confidence_interval
        assert low < returns.mean() < high
        assert high - low == pytest.approx(2 * 2.262 * result.standard_error)

    def test_too_few_trials_raises(self) -> None:
        with pytest.raises(InsufficientDataError):
            batch_means_convergence(np.zeros(5))


class TestMonteCarloEngine:
    def test_result_is_deterministic_for_fixed_seed(self, engine, snapshot, factor_model) -> None:
        request = MonteCarloRequest(number_of_paths=2_000, seed=11)
        a = engine.simulate(snapshot, factor_model, request)
        b = engine.simulate(snapshot, factor_model, request)
        assert a.percentiles == b.percentiles
        assert a.var99 == b.var99

    @pytest.mark.parametrize("workers", [1, 2, 3, 8])
    def test_worker_count_does_not_change_result(
        self, engine, snapshot, factor_model, workers
    ) -> None:
        baseline = engine.simulate(
            snapshot, factor_model, MonteCarloRequest(number_of_paths=1_500, seed=3, max_workers=1)
        )
        other = engine.simulate(
            snapshot,
            factor_model,
            MonteCarloRequest(number_of_paths=1_500, seed=3, max_workers=workers),
        )
        assert other.percentiles == baseline.percentiles
        assert other.expected_return == baseline.expected_return

    def test_different_seeds_differ(self, engine, snapshot, factor_model) -> None:
        a = engine.simulate(snapshot, factor_model, MonteCarloRequest(number_of_paths=500, seed=1))
        b = engine.simulate(snapshot, factor_model, MonteCarloRequest(number_of_paths=500, seed=2))
        assert a.percentiles != b.percentiles

    def test_cvar_dominates_var(self, engine, snapshot, factor_model) -> None:
        result = engine.simulate(
            snapshot, factor_model, MonteCarloRequest(number_of_paths=3_000, seed=5)
        )
        assert result.cvar95 >= result.var95
        assert result.cvar99 >= result.var99
        assert result.expected_shortfall == result.cvar95
        assert result.number_of_paths == 3_000
        assert result.portfolio_id == snapshot.portfolio_id

    def test_daily_statistics_match_model(self, engine, snapshot, factor_model) -> None:
        result = engine.simulate(
            snapshot, factor_model, MonteCarloRequest(number_of_paths=20_000, seed=8)
        )
        w = snapshot.market_values() / snapshot.total_value
        expected_std = np.sqrt(w @ factor_model.daily_covariance() @ w)
        assert result.standard_deviation == pytest.approx(expected_std, rel=0.05)

    def test_longer_horizon_is_riskier(self, engine, snapshot, factor_model) -> None:
        day = engine.simulate(
            snapshot, factor_model, MonteCarloRequest(number_of_paths=2_000, seed=4)
        )
        month = engine.simulate(
            snapshot,
            factor_model,
            MonteCarloRequest(number_of_paths=2_000, seed=4, time_horizon=TimeHorizon.ONE_MONTH),
        )
        assert month.time_horizon is TimeHorizon.ONE_MONTH
        assert month.standard_deviation > 3 * day.standard_deviation

    def test_jump_risk_fattens_the_left_tail(self, engine, snapshot, factor_model) -> None:
        plain = engine.simulate(
            snapshot,
            factor_model,
            MonteCarloRequest(number_of_paths=3_000, seed=6, time_horizon="1M"),
        )
        jumpy = engine.simulate(
            snapshot,
            factor_model,
            MonteCarloRequest(
                number_of_paths=3_000,
                seed=6,
                time_horizon="1M",
                include_jump_risk=True,
                jump_intensity=12.0,
            ),
        )
        assert jumpy.var99 > plain.var99

    def test_indefinite_correlation_still_produces_result(self, engine) -> None:
        model = RiskFactorModel(
            asset_ids=("A", "B", "C"),
            expected_returns=np.array([0.05, 0.05, 0.05]),
            volatilities=np.array([0.2, 0.2, 0.2]),
            correlation_matrix=INDEFINITE_CORRELATION,
        )
        book = PortfolioSnapshot(
            "INDEF",
            date(2024, 1, 2),
            tuple(Position(f"P{a}", a, a, 100.0, "EQUITY") for a in ("A", "B", "C")),
        )
        result = engine.simulate(book, model, MonteCarloRequest(number_of_paths=500, seed=1))
        assert np.isfinite(result.var99)
        assert result.cvar99 >= result.var99

    def test_fewer_than_two_paths_raises(self, engine, snapshot, factor_model) -> None:
        with pytest.raises(InsufficientTrialsError):
            engine.simulate(snapshot, factor_model, MonteCarloRequest(number_of_paths=1))

    def test_fewer_paths_than_batches_raises(self, engine, snapshot, factor_model) -> None:
        with pytest.raises(InsufficientDataError):
            engine.simulate(snapshot, factor_model, MonteCarloRequest(number_of_paths=5))

    def test_asset_returns_follow_instrument_order(self, engine, snapshot, factor_model) -> None:
        ids, returns = engine.simulate_asset_returns(
            snapshot, factor_model, MonteCarloRequest(number_of_paths=50, seed=2)
        )
        assert ids == snapshot.instrument_ids
        assert returns.shape == (50, 3)
