"""
Monte Carlo Simulation Engine
=============================
Runs independent GBM trials through ``RandomPathSimulator`` and reduces
them to a portfolio return distribution with VaR, CVaR, percentiles and
a batch-means convergence diagnostic.

Mathematical Foundation:
    Trial return:  R_k = Σ w_i (S_i(T)/S_i(0) - 1)
    VaR_c:         |R_(⌊(1-c)·n⌋)|        (returns sorted ascending)
    CVaR_c:        |mean(R_(0..⌊(1-c)·n⌋))|
    Batch means:   SE = sd(m_1..m_10) / √10,  converged if SE < 1%·|mean|

Trials are partitioned across a thread pool; each trial owns a generator
derived from (entropy, trial_index), so the assembled result does not
depend on the number of workers.
"""

from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Tuple

import numpy as np
import structlog

from portfolio_risk.config import (
    CONVERGENCE_BATCHES,
    CONVERGENCE_RELATIVE_THRESHOLD,
    CONVERGENCE_T_VALUE,
    MIN_TRIALS,
    REPORTED_PERCENTILES,
    TRADING_DAYS_PER_YEAR,
)
from portfolio_risk.exceptions import InsufficientDataError, InsufficientTrialsError
from portfolio_risk.models import (
    ConvergenceTest,
    MonteCarloRequest,
    MonteCarloResult,
    PercentileResult,
    PortfolioSnapshot,
    RiskFactorModel,
)
from portfolio_risk.portfolio import asset_exposures, base_value
from portfolio_risk.risk_metrics import empirical_es, empirical_var
from portfolio_risk.simulation import RandomPathSimulator, resolve_entropy
from portfolio_risk.statistics import distribution_moments, percentile

logger = structlog.get_logger(__name__)


# ─────────────────────────────────────────────────────────────
# Distribution reductions
# ─────────────────────────────────────────────────────────────

def compute_mc_var(returns: np.ndarray, confidence_level: float = 0.99) -> float:
    """
    Value-at-Risk from a simulated return distribution.

    Parameters
    ----------
    returns : np.ndarray
        Simulated portfolio returns (any order).
    confidence_level : float
        Confidence level (default: 0.99).

    Returns
    -------
    float
        Loss magnitude at the (1 - c) nearest-rank quantile, floored at 0.
    """
    return empirical_var(returns, confidence_level)


def compute_mc_expected_shortfall(returns: np.ndarray, confidence_level: float = 0.99) -> float:
    """
    Expected Shortfall (CVaR) from a simulated return distribution.

    Mean of every return at or below the VaR index; never smaller than
    ``compute_mc_var`` at the same level.
    """
    return empirical_es(returns, confidence_level)


def batch_means_convergence(
    returns: np.ndarray,
    batches: int = CONVERGENCE_BATCHES,
    relative_threshold: float = CONVERGENCE_RELATIVE_THRESHOLD,
    t_value: float = CONVERGENCE_T_VALUE,
) -> ConvergenceTest:
    """
    Batch-means convergence diagnostic.

    Parameters
    ----------
    returns : np.ndarray
        Trial returns in trial order (not sorted by value).
    batches : int
        Number of contiguous batches.

    Returns
    -------
    ConvergenceTest
        Standard error of the batch means, the 1%·|mean| threshold and a
        95% confidence interval for the mean.

    Raises
    ------
    InsufficientDataError
        If there are fewer trials than batches.
    """
    returns = np.asarray(returns, dtype=float)
    if returns.size < batches:
        raise InsufficientDataError(batches, returns.size, "trials for batch means")

    means = np.array([b.mean() for b in np.array_split(returns, batches)])
    overall = float(returns.mean())
    standard_error = float(means.std(ddof=1) / np.sqrt(batches))
    threshold = relative_threshold * abs(overall)

    return ConvergenceTest(
        has_converged=standard_error < threshold,
        standard_error=standard_error,
        convergence_threshold=threshold,
        confidence_interval=(
            overall - t_value * standard_error,
            overall + t_value * standard_error,
        ),
        batch_means=tuple(float(m) for m in means),
    )


def summarize_returns(returns: np.ndarray) -> Dict[str, object]:
    """Every distribution statistic reported on ``MonteCarloResult``."""
    returns = np.asarray(returns, dtype=float)
    moments = distribution_moments(returns)
    worst = float(returns.min())
    mean = moments["mean"]

    return {
        "expected_return": mean,
        "standard_deviation": moments["std"],
        "skewness": moments["skewness"],
        "kurtosis": moments["kurtosis"],
        "var95": compute_mc_var(returns, 0.95),
        "var99": compute_mc_var(returns, 0.99),
        "cvar95": compute_mc_expected_shortfall(returns, 0.95),
        "cvar99": compute_mc_expected_shortfall(returns, 0.99),
        "percentiles": tuple(
            PercentileResult(p, percentile(returns, p)) for p in REPORTED_PERCENTILES
        ),
        # Terminal-loss proxy; paths are not tracked intra-horizon.
        "max_drawdown": abs(worst),
        "time_to_recovery": abs(worst) / mean * TRADING_DAYS_PER_YEAR if mean > 0 else 0.0,
        "probability_of_loss": float(np.mean(returns < 0) * 100.0),
    }


# ─────────────────────────────────────────────────────────────
# Engine
# ─────────────────────────────────────────────────────────────

class MonteCarloEngine:
    """Orchestrates trials and aggregates the return distribution."""

    def build_simulator(
        self,
        portfolio: PortfolioSnapshot,
        factor_model: RiskFactorModel,
        request: MonteCarloRequest,
    ) -> RandomPathSimulator:
        portfolio.validate()
        asset_ids = portfolio.instrument_ids
        model = factor_model.subset(asset_ids)
        weights = asset_exposures(portfolio, asset_ids) / base_value(portfolio)
        return RandomPathSimulator(
            model,
            weights,
            time_steps=request.time_horizon.trading_days,
            include_jump_risk=request.include_jump_risk,
            jump_intensity=request.jump_intensity,
            jump_mean=request.jump_mean,
            jump_std=request.jump_std,
        )

    def run_trials(
        self, simulator: RandomPathSimulator, request: MonteCarloRequest
    ) -> np.ndarray:
        """
        Asset returns for every trial, (number_of_paths x N), in trial order.

        Raises
        ------
        InsufficientTrialsError
            If fewer than two paths are requested.
        """
        n = request.number_of_paths
        if n < MIN_TRIALS:
            raise InsufficientTrialsError(MIN_TRIALS, n)

        entropy = resolve_entropy(request.seed)
        workers = max(1, min(request.max_workers, n))
        chunks = np.array_split(np.arange(n), workers)

        if workers == 1:
            return simulator.simulate_trials(chunks[0], entropy)

        with ThreadPoolExecutor(max_workers=workers) as executor:
            blocks = list(
                executor.map(lambda chunk: simulator.simulate_trials(chunk, entropy), chunks)
            )
        return np.vstack(blocks)

    def simulate_asset_returns(
        self,
        portfolio: PortfolioSnapshot,
        factor_model: RiskFactorModel,
        request: MonteCarloRequest,
    ) -> Tuple[Tuple[str, ...], np.ndarray]:
        """
        Per-asset terminal returns over the request horizon.

        Returns
        -------
        tuple
            (asset_ids, returns) with returns of shape (number_of_paths x N).
            Any exposure vector over ``asset_ids`` maps them to P&L, so
            sub-portfolios share the same random numbers.
        """
        simulator = self.build_simulator(portfolio, factor_model, request)
        return simulator.factor_model.asset_ids, self.run_trials(simulator, request)

    def simulate(
        self,
        portfolio: PortfolioSnapshot,
        factor_model: RiskFactorModel,
        request: MonteCarloRequest = MonteCarloRequest(),
    ) -> MonteCarloResult:
        """
        Run the simulation and reduce it to a ``MonteCarloResult``.

        Raises
        ------
        InsufficientTrialsError
            If ``number_of_paths`` < 2.
        InsufficientDataError
            If there are fewer trials than convergence batches.
        """
        if request.number_of_paths < MIN_TRIALS:
            raise InsufficientTrialsError(MIN_TRIALS, request.number_of_paths)
        if request.number_of_paths < CONVERGENCE_BATCHES:
            raise InsufficientDataError(
                CONVERGENCE_BATCHES, request.number_of_paths, "trials for batch means"
            )

        simulator = self.build_simulator(portfolio, factor_model, request)
        asset_returns = self.run_trials(simulator, request)
        returns = asset_returns @ simulator.weights

        stats = summarize_returns(returns)
        convergence = batch_means_convergence(returns)

        logger.info(
            "monte_carlo_completed",
            portfolio_id=portfolio.portfolio_id,
            paths=request.number_of_paths,
            horizon=request.time_horizon.value,
            regularized=simulator.regularized,
            converged=convergence.has_converged,
            var99=stats["var99"],
        )

        return MonteCarloResult(
            portfolio_id=portfolio.portfolio_id,
            as_of_date=portfolio.as_of_date,
            number_of_paths=request.number_of_paths,
            time_horizon=request.time_horizon,
            expected_shortfall=stats["cvar95"],
            convergence_test=convergence,
            **stats,
        )
