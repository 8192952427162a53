"""Tests for exception counting and the rolling-window backtest."""

import numpy as np
import pytest

from portfolio_risk.backtesting import (
    compute_breach_statistics,
    rolling_var_backtest,
    run_backtest,
    run_full_backtest,
)
from portfolio_risk.exceptions import InsufficientDataError, UnsupportedConfidenceLevelError


class TestRunBacktest:
    def test_counts_losses_beyond_var(self) -> None:
        returns = np.full(100, 0.001)
        returns[[10, 50, 90]] = -0.05
        result = run_backtest(returns, 0.02, confidence_level=0.99)
        assert result.observations == 100
        assert result.number_of_exceptions == 3
        assert result.exception_rate == pytest.approx(0.03)
        assert result.expected_exception_rate == pytest.approx(0.01)

    def test_loss_equal_to_var_is_not_an_exception(self) -> None:
        returns = np.full(50, -0.02)
        result = run_backtest(returns, 0.02, confidence_level=0.95)
        assert result.number_of_exceptions == 0

    def test_per_day_thresholds(self) -> None:
        returns = np.full(40, -0.03)
        thresholds = np.where(np.arange(40) < 20, 0.01, 0.05)
        result = run_backtest(returns, thresholds, confidence_level=0.95)
        assert result.number_of_exceptions == 20

    def test_non_finite_days_dropped_jointly(self) -> None:
        returns = np.full(40, 0.0)
        returns[0] = np.nan
        thresholds = np.full(40, 0.01)
        thresholds[1] = np.inf
        result = run_backtest(returns, thresholds, confidence_level=0.95)
        assert result.observations == 38

    def test_too_few_observations(self) -> None:
        with pytest.raises(InsufficientDataError):
            run_backtest(np.zeros(10), 0.01)

    def test_unsupported_confidence(self) -> None:
        with pytest.raises(UnsupportedConfidenceLevelError):
            run_backtest(np.zeros(100), 0.01, confidence_level=0.9)

    def test_frequent_breaches_reject_the_model(self) -> None:
        returns = np.zeros(250)
        returns[:40] = -0.1
        result = run_backtest(returns, 0.05, confidence_level=0.99)
        assert result.kupiec_test.reject_null is True
        assert result.christoffersen_test.reject_null is True
        assert result.is_model_accurate is False


class TestRollingBacktest:
    def test_frame_layout(self, historical_returns) -> None:
        weights = np.array([0.5, 0.3, 0.2])
        frame = rolling_var_backtest(historical_returns, weights, window=250)
        assert len(frame) == len(historical_returns) - 250
        assert list(frame.columns) == [
            "date", "predicted_var", "actual_return", "actual_loss", "breach"
        ]
        assert frame["date"].iloc[0] == historical_returns.index[250]
        assert (frame["predicted_var"] > 0).all()
        assert np.allclose(frame["actual_loss"], -frame["actual_return"])

    def test_breach_statistics(self, historical_returns) -> None:
        weights = np.array([0.5, 0.3, 0.2])
        frame = rolling_var_backtest(historical_returns, weights, window=250)
        stats = compute_breach_statistics(frame, 0.99)
        assert stats["total_observations"] == len(frame)
        assert stats["num_breaches"] == int(frame["breach"].sum())
        assert stats["expected_breach_rate"] == pytest.approx(0.01)
        assert stats["breach_ratio"] == pytest.approx(stats["breach_rate"] / 0.01)

    def test_full_backtest(self, historical_returns) -> None:
        weights = np.array([0.5, 0.3, 0.2])
        frame, stats, result = run_full_backtest(historical_returns, weights, window=250)
        assert result.observations == len(frame) == 150
        assert result.number_of_exceptions == stats["num_breaches"]
