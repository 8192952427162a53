"""
VaR Engine
==========
Value-at-Risk by one of three methods, with component, marginal and
incremental decompositions and an optional backtest.

Methods:
    PARAMETRIC             VaR = z_c · √h · sqrt(eᵀ Σ_daily e)
    HISTORICAL_SIMULATION  VaR = -P&L_(⌊(1-c)·T⌋) · √h,  P&L_t = eᵀ r_t
    MONTE_CARLO            VaR = -P&L_(⌊(1-c)·n⌋) over simulated horizon returns

Decompositions:
    Component    Euler allocation per asset class (sums to the total VaR),
                 plus each class's standalone VaR
    Marginal     VaR(full) - VaR(full without p), plus the Euler contribution
    Incremental  VaR(with p) - VaR(without p)

Marginal and incremental VaR share one leave-one-out recomputation per
position. Every recomputation reuses the scenario set (or covariance) of
the headline figure, so sub-portfolio VaRs are directly comparable.
"""

import math
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
import structlog

from portfolio_risk.config import (
    METHOD_PRIOR_ACCURACY,
    MIN_BACKTEST_OBSERVATIONS,
    MIN_HISTORICAL_OBSERVATIONS,
    TRADING_DAYS_PER_YEAR,
)
from portfolio_risk.backtesting import run_backtest
from portfolio_risk.exceptions import (
    InputValidationError,
    InsufficientDataError,
    NumericalInstabilityError,
)
from portfolio_risk.models import (
    BacktestResult,
    ComponentVaR,
    DecompositionError,
    IncrementalVaR,
    MarginalVaR,
    ModelAssumptions,
    MonteCarloRequest,
    PortfolioSnapshot,
    RiskFactorModel,
    VaRMethod,
    VaRRequest,
    VaRResult,
)
from portfolio_risk.monte_carlo import MonteCarloEngine
from portfolio_risk.portfolio import align_returns, base_value, exposure_matrix
from portfolio_risk.risk_metrics import (
    empirical_quantile,
    empirical_var,
    parametric_euler_contributions,
    parametric_var,
    portfolio_std,
)
from portfolio_risk.statistics import pearson_correlation

logger = structlog.get_logger(__name__)


# ─────────────────────────────────────────────────────────────
# Loss models
# ─────────────────────────────────────────────────────────────

class CovarianceLossModel:
    """Gaussian loss model over a daily covariance matrix."""

    def __init__(self, covariance: np.ndarray, confidence_level: float, horizon_days: int):
        self.covariance = covariance
        self.confidence_level = confidence_level
        self.horizon_days = horizon_days

    def var(self, exposures: np.ndarray) -> float:
        return parametric_var(exposures, self.covariance, self.confidence_level, self.horizon_days)

    def contributions(self, rows: np.ndarray, exposures: np.ndarray) -> np.ndarray:
        return parametric_euler_contributions(
            rows, exposures, self.covariance, self.confidence_level, self.horizon_days
        )

    def correlation(self, x: np.ndarray, y: np.ndarray) -> float:
        sx = portfolio_std(x, self.covariance)
        sy = portfolio_std(y, self.covariance)
        if sx == 0.0 or sy == 0.0:
            return 0.0
        return float(np.clip((x @ self.covariance @ y) / (sx * sy), -1.0, 1.0))


class ScenarioLossModel:
    """
    Empirical loss model over a fixed set of per-asset return scenarios
    (historical days or simulated trials).
    """

    def __init__(self, scenario_returns: np.ndarray, confidence_level: float, scale: float = 1.0):
        self.scenario_returns = np.asarray(scenario_returns, dtype=float)
        self.confidence_level = confidence_level
        self.scale = scale

    def pnl(self, exposures: np.ndarray) -> np.ndarray:
        return self.scenario_returns @ exposures

    def var(self, exposures: np.ndarray) -> float:
        return empirical_var(self.pnl(exposures), self.confidence_level) * self.scale

    def contributions(self, rows: np.ndarray, exposures: np.ndarray) -> np.ndarray:
        # Euler allocation at the quantile scenario.
        quantile, k = empirical_quantile(self.pnl(exposures), self.confidence_level)
        if quantile >= 0.0:
            # VaR is floored at zero here, so nothing is left to allocate.
            return np.zeros(len(rows))
        return -(rows @ self.scenario_returns[k]) * self.scale

    def correlation(self, x: np.ndarray, y: np.ndarray) -> float:
        return pearson_correlation(self.pnl(x), self.pnl(y))


# ─────────────────────────────────────────────────────────────
# Engine
# ─────────────────────────────────────────────────────────────

class VaREngine:
    """
    Parameters
    ----------
    monte_carlo_engine : MonteCarloEngine, optional
        Simulation engine used by the MONTE_CARLO method.
    """

    def __init__(self, monte_carlo_engine: Optional[MonteCarloEngine] = None):
        self.monte_carlo_engine = monte_carlo_engine or MonteCarloEngine()

    def calculate_var(
        self,
        portfolio: PortfolioSnapshot,
        factor_model: Optional[RiskFactorModel] = None,
        historical_returns: Optional[pd.DataFrame] = None,
        request: VaRRequest = VaRRequest(),
    ) -> VaRResult:
        """
        Compute VaR and its decompositions for a snapshot.

        Parameters
        ----------
        portfolio : PortfolioSnapshot
            Holdings; market values in the base currency.
        factor_model : RiskFactorModel, optional
            Required by the PARAMETRIC and MONTE_CARLO methods.
        historical_returns : pd.DataFrame, optional
            Daily simple returns, one column per instrument id. Required by
            HISTORICAL_SIMULATION; also the default backtest sample.
        request : VaRRequest
            Method, confidence level, horizon and backtest options.

        Returns
        -------
        VaRResult
            Money VaR figures; per-entry decomposition failures are listed
            in ``decomposition_errors``.

        Raises
        ------
        EmptyPortfolioError, InputValidationError, InsufficientDataError
        """
        portfolio.validate()
        asset_ids = portfolio.instrument_ids
        value = base_value(portfolio)
        exposures_by_position = exposure_matrix(portfolio, asset_ids)
        exposures = exposures_by_position.sum(axis=0)

        model, assumptions = self._build_loss_model(
            portfolio, factor_model, historical_returns, request
        )

        total_var = model.var(exposures)
        if not math.isfinite(total_var):
            raise NumericalInstabilityError("total VaR")

        standalone = np.array([model.var(row) for row in exposures_by_position])
        undiversified = float(standalone.sum())
        if undiversified < total_var:
            # Empirical quantiles are not always sub-additive.
            logger.warning(
                "undiversified_var_below_diversified",
                undiversified=undiversified,
                diversified=total_var,
            )
            undiversified = total_var

        errors: List[DecompositionError] = []
        try:
            euler = model.contributions(exposures_by_position, exposures)
        except NumericalInstabilityError as exc:
            logger.warning("var_decomposition_entry_failed", decomposition="euler", error=str(exc))
            errors.append(DecompositionError("euler", portfolio.portfolio_id, str(exc)))
            euler = None

        components = self._component_var(
            portfolio, exposures_by_position, exposures, total_var, model, euler, errors
        )
        var_without = self._leave_one_out(
            portfolio, exposures_by_position, exposures, model, request.max_workers, errors
        )
        marginal, incremental = self._marginal_and_incremental(
            portfolio, total_var, var_without, euler
        )

        backtest = None
        if request.include_backtest:
            backtest = self._backtest(
                portfolio, exposures, value, total_var, historical_returns, request
            )

        if backtest is not None:
            model_accuracy = max(
                0.0, 1.0 - abs(backtest.exception_rate - backtest.expected_exception_rate)
            )
        else:
            model_accuracy = METHOD_PRIOR_ACCURACY[request.method.value]

        logger.info(
            "var_calculated",
            portfolio_id=portfolio.portfolio_id,
            method=request.method.value,
            confidence=request.confidence_level,
            horizon=request.time_horizon.value,
            var=round(total_var, 2),
            decomposition_errors=len(errors),
        )

        return VaRResult(
            portfolio_id=portfolio.portfolio_id,
            as_of_date=portfolio.as_of_date,
            method=request.method,
            confidence_level=request.confidence_level,
            time_horizon=request.time_horizon,
            portfolio_value=portfolio.total_value,
            total_var=total_var,
            diversified_var=total_var,
            undiversified_var=undiversified,
            diversification_benefit=undiversified - total_var,
            component_var=tuple(components),
            marginal_var=tuple(marginal),
            incremental_var=tuple(incremental),
            backtest=backtest,
            model_accuracy=model_accuracy,
            assumptions=assumptions,
            decomposition_errors=tuple(errors),
        )

    # ── Method dispatch ───────────────────────────────────────

    def _build_loss_model(
        self,
        portfolio: PortfolioSnapshot,
        factor_model: Optional[RiskFactorModel],
        historical_returns: Optional[pd.DataFrame],
        request: VaRRequest,
    ):
        asset_ids = portfolio.instrument_ids
        horizon = request.time_horizon.trading_days
        lookback = len(historical_returns) if historical_returns is not None else TRADING_DAYS_PER_YEAR

        if request.method is VaRMethod.PARAMETRIC:
            if factor_model is None:
                raise InputValidationError("factor_model", "required for PARAMETRIC VaR")
            covariance = factor_model.subset(asset_ids).daily_covariance()
            model = CovarianceLossModel(covariance, request.confidence_level, horizon)
            assumptions = ModelAssumptions("NORMAL", "FACTOR_MODEL", "CONSTANT", lookback)

        elif request.method is VaRMethod.HISTORICAL_SIMULATION:
            if historical_returns is None:
                raise InsufficientDataError(MIN_HISTORICAL_OBSERVATIONS, 0, "historical days")
            aligned = align_returns(historical_returns, asset_ids, MIN_HISTORICAL_OBSERVATIONS)
            model = ScenarioLossModel(aligned.values, request.confidence_level, math.sqrt(horizon))
            assumptions = ModelAssumptions("EMPIRICAL", "HISTORICAL", "HISTORICAL", len(aligned))

        else:
            if factor_model is None:
                raise InputValidationError("factor_model", "required for MONTE_CARLO VaR")
            mc_request = MonteCarloRequest(
                number_of_paths=request.monte_carlo_paths,
                time_horizon=request.time_horizon,
                seed=request.seed,
                max_workers=request.max_workers,
            )
            _, simulated = self.monte_carlo_engine.simulate_asset_returns(
                portfolio, factor_model, mc_request
            )
            model = ScenarioLossModel(simulated, request.confidence_level)
            assumptions = ModelAssumptions("LOGNORMAL", "CHOLESKY", "CONSTANT", lookback)

        return model, assumptions

    # ── Decompositions ────────────────────────────────────────

    def _component_var(
        self,
        portfolio: PortfolioSnapshot,
        exposures_by_position: np.ndarray,
        exposures: np.ndarray,
        total_var: float,
        model,
        euler: Optional[np.ndarray],
        errors: List[DecompositionError],
    ) -> List[ComponentVaR]:
        groups: Dict[str, List[int]] = {}
        for p, position in enumerate(portfolio.positions):
            groups.setdefault(position.category("asset_class"), []).append(p)

        components = []
        for name, members in groups.items():
            if euler is None:
                errors.append(DecompositionError("component", name, "euler allocation unavailable"))
                continue
            group_exposures = exposures_by_position[members].sum(axis=0)
            contribution = float(euler[members].sum())
            components.append(
                ComponentVaR(
                    component_type="ASSET_CLASS",
                    component_name=name,
                    var=contribution,
                    standalone_var=model.var(group_exposures),
                    percent_of_total=contribution / total_var * 100.0 if total_var > 0 else 0.0,
                    correlation=model.correlation(group_exposures, exposures),
                )
            )
        return components

    def _leave_one_out(
        self,
        portfolio: PortfolioSnapshot,
        exposures_by_position: np.ndarray,
        exposures: np.ndarray,
        model,
        max_workers: int,
        errors: List[DecompositionError],
    ) -> Dict[int, float]:
        """VaR of the portfolio without each position, keyed by position index."""

        def var_without(p: int) -> float:
            v = model.var(exposures - exposures_by_position[p])
            if not math.isfinite(v):
                raise NumericalInstabilityError("leave-one-out VaR")
            return v

        n_positions = len(portfolio.positions)
        with ThreadPoolExecutor(max_workers=min(max_workers, n_positions)) as executor:
            futures = [executor.submit(var_without, p) for p in range(n_positions)]

        out: Dict[int, float] = {}
        for p, future in enumerate(futures):
            try:
                out[p] = future.result()
            except NumericalInstabilityError as exc:
                position_id = portfolio.positions[p].id
                logger.warning(
                    "var_decomposition_entry_failed",
                    decomposition="leave_one_out",
                    position_id=position_id,
                    error=str(exc),
                )
                errors.append(DecompositionError("marginal", position_id, str(exc)))
                errors.append(DecompositionError("incremental", position_id, str(exc)))
        return out

    def _marginal_and_incremental(
        self,
        portfolio: PortfolioSnapshot,
        total_var: float,
        var_without: Dict[int, float],
        euler: Optional[np.ndarray],
    ) -> Tuple[List[MarginalVaR], List[IncrementalVaR]]:
        marginal, incremental = [], []
        for p, position in enumerate(portfolio.positions):
            if p not in var_without:
                continue
            without = var_without[p]
            delta = total_var - without
            incremental.append(
                IncrementalVaR(
                    position_id=position.id,
                    instrument_id=position.instrument_id,
                    symbol=position.symbol,
                    incremental_var=delta,
                    var_with=total_var,
                    var_without=without,
                )
            )
            if euler is None:
                continue
            contribution = float(euler[p])
            marginal.append(
                MarginalVaR(
                    position_id=position.id,
                    instrument_id=position.instrument_id,
                    symbol=position.symbol,
                    marginal_var=delta,
                    contribution=contribution,
                    percent_contribution=contribution / total_var * 100.0 if total_var > 0 else 0.0,
                )
            )
        return marginal, incremental

    # ── Backtest ──────────────────────────────────────────────

    def _backtest(
        self,
        portfolio: PortfolioSnapshot,
        exposures: np.ndarray,
        value: float,
        total_var: float,
        historical_returns: Optional[pd.DataFrame],
        request: VaRRequest,
    ) -> BacktestResult:
        if request.realized_returns is not None:
            realized = np.asarray(request.realized_returns, dtype=float)
        elif historical_returns is not None:
            aligned = align_returns(historical_returns, portfolio.instrument_ids)
            realized = aligned.values @ exposures / value
        else:
            raise InsufficientDataError(MIN_BACKTEST_OBSERVATIONS, 0, "backtest observations")

        realized = realized[-request.backtest_period:]
        one_day_var = total_var / math.sqrt(request.time_horizon.trading_days) / value
        return run_backtest(realized, one_day_var, request.confidence_level)
