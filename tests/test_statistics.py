"""Tests for moments, correlation, regression, percentiles and coverage tests."""

import numpy as np
import pandas as pd
import pytest

from portfolio_risk.exceptions import InputValidationError, NumericalInstabilityError
from portfolio_risk.statistics import (
    christoffersen_independence_statistic,
    christoffersen_test,
    compute_covariance_matrix,
    compute_mean_vector,
    correlation_matrix,
    distribution_moments,
    kupiec_test,
    linear_regression,
    nearest_rank_index,
    pearson_correlation,
    percentile,
    spearman_correlation,
)


class TestMoments:
    def test_constant_sample_has_zero_higher_moments(self) -> None:
        m = distribution_moments([0.5] * 50)
        assert m == {"mean": 0.5, "std": 0.0, "skewness": 0.0, "kurtosis": 0.0}

    def test_normal_sample(self, rng) -> None:
        m = distribution_moments(rng.normal(0.0, 2.0, size=200_000))
        assert m["mean"] == pytest.approx(0.0, abs=0.02)
        assert m["std"] == pytest.approx(2.0, rel=0.01)
        assert m["skewness"] == pytest.approx(0.0, abs=0.03)
        assert m["kurtosis"] == pytest.approx(0.0, abs=0.05)

    def test_right_skewed_sample(self, rng) -> None:
        m = distribution_moments(rng.exponential(size=50_000))
        assert m["skewness"] > 1.5
        assert m["kurtosis"] > 3.0

    def test_empty_sample_raises(self) -> None:
        with pytest.raises(InputValidationError):
            distribution_moments([])

    def test_frame_estimators(self, historical_returns) -> None:
        mu = compute_mean_vector(historical_returns)
        cov = compute_covariance_matrix(historical_returns)
        assert np.allclose(mu, historical_returns.mean().values)
        assert np.allclose(cov, historical_returns.cov().values)


class TestCorrelation:
    def test_perfect_positive_and_negative(self) -> None:
        x = np.arange(10.0)
        assert pearson_correlation(x, 3 * x + 1) == pytest.approx(1.0)
        assert pearson_correlation(x, -x) == pytest.approx(-1.0)

    def test_zero_variance_yields_zero(self) -> None:
        assert pearson_correlation([1.0, 1.0, 1.0], [1.0, 2.0, 3.0]) == 0.0

    def test_short_series_yields_zero(self) -> None:
        assert pearson_correlation([1.0], [2.0]) == 0.0

    def test_uses_common_length(self) -> None:
        assert pearson_correlation([1.0, 2.0, 3.0, 100.0], [1.0, 2.0, 3.0]) == pytest.approx(1.0)

    def test_spearman_is_rank_based(self) -> None:
        x = np.linspace(0.1, 5.0, 30)
        assert spearman_correlation(x, np.exp(x)) == pytest.approx(1.0)
        assert pearson_correlation(x, np.exp(x)) < 1.0

    def test_matrix_matches_pandas(self, historical_returns) -> None:
        ours = correlation_matrix(historical_returns.values, "PEARSON")
        assert np.allclose(ours, historical_returns.corr().values, atol=1e-12)
        spearman = correlation_matrix(historical_returns.values, "spearman")
        assert np.allclose(spearman, historical_returns.corr(method="spearman").values, atol=1e-12)


class TestRegression:
    def test_exact_line(self) -> None:
        x = np.arange(20.0)
        fit = linear_regression(x, 2.0 * x + 1.0)
        assert fit.slope == pytest.approx(2.0)
        assert fit.intercept == pytest.approx(1.0)
        assert fit.r_squared == pytest.approx(1.0)

    def test_noisy_line(self, rng) -> None:
        x = rng.normal(size=5_000)
        y = -0.5 * x + 0.2 + rng.normal(scale=0.1, size=x.size)
        fit = linear_regression(x, y)
        assert fit.slope == pytest.approx(-0.5, abs=0.01)
        assert 0.0 < fit.r_squared < 1.0

    def test_zero_variance_x_raises(self) -> None:
        with pytest.raises(NumericalInstabilityError):
            linear_regression([2.0, 2.0, 2.0], [1.0, 2.0, 3.0])

    def test_length_mismatch_raises(self) -> None:
        with pytest.raises(InputValidationError):
            linear_regression([1.0, 2.0], [1.0])


class TestPercentile:
    def test_nearest_rank(self) -> None:
        values = list(range(100, 0, -1))
        assert percentile(values, 5) == 6.0
        assert percentile(values, 0) == 1.0
        assert percentile(values, 100) == 100.0

    def test_input_is_not_modified(self) -> None:
        values = [3.0, 1.0, 2.0]
        percentile(values, 50)
        assert values == [3.0, 1.0, 2.0]

    def test_index_is_clamped(self) -> None:
        assert nearest_rank_index(10, 1.0) == 9
        assert nearest_rank_index(10, 0.0) == 0
        # 0.01 * 300 is 3.0000000000000004 in binary floating point.
        assert nearest_rank_index(300, 0.01) == 3


# ---------------------------------------------------------------------------
# Backtesting hypothesis tests
# ---------------------------------------------------------------------------


class TestKupiec:
    def test_observed_rate_near_expected_is_not_rejected(self) -> None:
        result = kupiec_test(exceptions=13, observations=250, expected_exception_rate=0.05)
        assert result.reject_null is False
        assert result.critical_value == pytest.approx(3.841)
        assert result.p_value > 0.05

    def test_too_many_exceptions_rejected(self) -> None:
        result = kupiec_test(exceptions=30, observations=250, expected_exception_rate=0.01)
        assert result.reject_null is True
        assert result.p_value < 0.05

    def test_zero_exceptions_is_finite(self) -> None:
        result = kupiec_test(exceptions=0, observations=250, expected_exception_rate=0.01)
        assert np.isfinite(result.test_statistic)
        assert result.test_statistic == pytest.approx(-2 * 250 * np.log(0.99))

    def test_exact_rate_gives_zero_statistic(self) -> None:
        result = kupiec_test(exceptions=10, observations=1000, expected_exception_rate=0.01)
        assert result.test_statistic == pytest.approx(0.0, abs=1e-9)

    def test_invalid_counts_raise(self) -> None:
        with pytest.raises(InputValidationError):
            kupiec_test(exceptions=5, observations=3, expected_exception_rate=0.05)
        with pytest.raises(InputValidationError):
            kupiec_test(exceptions=1, observations=0, expected_exception_rate=0.05)


class TestChristoffersen:
    def test_spread_out_exceptions_are_accepted(self) -> None:
        hits = np.arange(250) % 25 == 0
        result = christoffersen_test(hits, expected_exception_rate=0.04)
        assert result.reject_null is False
        assert result.critical_value == pytest.approx(5.991)

    def test_clustered_exceptions_are_rejected(self) -> None:
        hits = np.zeros(250, dtype=bool)
        hits[100:110] = True
        assert christoffersen_independence_statistic(hits) > 5.991
        result = christoffersen_test(hits, expected_exception_rate=0.04)
        assert result.reject_null is True

    def test_no_exceptions(self) -> None:
        hits = pd.Series([False] * 100)
        assert christoffersen_independence_statistic(hits) == pytest.approx(0.0)

    def test_single_observation_raises(self) -> None:
        with pytest.raises(InputValidationError):
            christoffersen_independence_statistic([True])
