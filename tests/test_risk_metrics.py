"""Tests for the parametric and empirical VaR / ES primitives."""

import math

import numpy as np
import pandas as pd
import pytest
from scipy import stats

from portfolio_risk.exceptions import NumericalInstabilityError, UnsupportedConfidenceLevelError
from portfolio_risk.risk_metrics import (
    compute_parametric_es,
    compute_parametric_var,
    empirical_es,
    empirical_quantile,
    empirical_var,
    historical_risk_metrics,
    parametric_euler_contributions,
    parametric_var,
    parametric_risk_metrics,
    z_score,
)


class TestParametric:
    def test_fixed_z_scores(self) -> None:
        assert z_score(0.95) == 1.645
        assert z_score(0.99) == 2.326
        assert z_score(0.999) == 3.090
        with pytest.raises(UnsupportedConfidenceLevelError):
            z_score(0.9)

    def test_return_space_var_and_es(self) -> None:
        var = compute_parametric_var(0.001, 0.02, 0.99)
        es = compute_parametric_es(0.001, 0.02, 0.99)
        assert var == pytest.approx(2.326 * 0.02 - 0.001)
        assert es == pytest.approx(0.02 * stats.norm.pdf(2.326) / 0.01 - 0.001)
        assert es > var

    def test_money_var_scales_with_root_horizon(self) -> None:
        cov = np.array([[1e-4, 0.0], [0.0, 4e-4]])
        e = np.array([1_000.0, 500.0])
        one_day = parametric_var(e, cov, 0.95)
        assert one_day == pytest.approx(1.645 * math.sqrt(1e-4 * 1e6 + 4e-4 * 2.5e5))
        assert parametric_var(e, cov, 0.95, horizon_days=10) == pytest.approx(one_day * math.sqrt(10))

    def test_euler_rows_sum_to_var(self) -> None:
        cov = np.array([[1e-4, 2e-5], [2e-5, 4e-4]])
        e = np.array([1_000.0, -300.0])
        contributions = parametric_euler_contributions(np.diag(e), e, cov, 0.99, 5)
        assert contributions.sum() == pytest.approx(parametric_var(e, cov, 0.99, 5))

    def test_euler_with_zero_volatility(self) -> None:
        with pytest.raises(NumericalInstabilityError):
            parametric_euler_contributions(np.eye(2), np.ones(2), np.zeros((2, 2)), 0.99)

    def test_dictionary_report(self) -> None:
        metrics = parametric_risk_metrics(0.0, 0.01)
        assert set(metrics) == {"param_var_95", "param_var_99", "param_es_95", "param_es_99"}
        assert metrics["param_var_99"] == pytest.approx(0.02326)


class TestEmpirical:
    def test_nearest_rank_quantile(self) -> None:
        pnl = np.arange(100, dtype=float) - 50.0
        shuffled = np.random.default_rng(0).permutation(pnl)
        quantile, scenario = empirical_quantile(shuffled, 0.95)
        assert quantile == -45.0
        assert shuffled[scenario] == -45.0
        assert empirical_var(shuffled, 0.95) == 45.0
        assert empirical_es(shuffled, 0.95) == pytest.approx(47.5)

    def test_profitable_tail_floors_at_zero(self) -> None:
        pnl = np.linspace(1.0, 2.0, 50)
        assert empirical_var(pnl, 0.99) == 0.0
        assert empirical_es(pnl, 0.99) == 0.0

    def test_historical_report(self) -> None:
        returns = pd.Series(np.linspace(-0.05, 0.05, 201))
        metrics = historical_risk_metrics(returns)
        assert metrics["hist_var_99"] >= metrics["hist_var_95"]
        assert metrics["hist_es_95"] >= metrics["hist_var_95"]
        assert metrics["hist_es_99"] >= metrics["hist_var_99"]
