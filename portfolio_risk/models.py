"""
Domain Models
=============
Immutable value types exchanged with the risk engines.

Inputs (``Position``, ``PortfolioSnapshot``, ``RiskFactorModel`` and the
request objects) are validated once at the engine boundary; results are
created fresh per call and never mutated afterwards.

Numeric conventions:
    - Monetary values are signed floats in the portfolio base currency.
    - Rates are fractional (0.95, not 95) unless a field ends in ``percent``
      or ``percentage``.
    - Expected returns and volatilities on ``RiskFactorModel`` are annualized.
"""

import dataclasses
import math
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Tuple

import numpy as np

from portfolio_risk.config import (
    DEFAULT_BACKTEST_PERIOD,
    DEFAULT_JUMP_INTENSITY,
    DEFAULT_JUMP_MEAN,
    DEFAULT_JUMP_STD,
    DEFAULT_MAX_WORKERS,
    DEFAULT_NUM_SIMULATIONS,
    DEFAULT_PCA_COMPONENTS,
    DEFAULT_SEED,
    HORIZON_TRADING_DAYS,
    SUPPORTED_CONFIDENCE_LEVELS,
    SYMMETRY_TOLERANCE,
    TRADING_DAYS_PER_YEAR,
)
from portfolio_risk.exceptions import (
    EmptyPortfolioError,
    InputValidationError,
    UnsupportedConfidenceLevelError,
    UnsupportedMethodError,
)


# ─────────────────────────────────────────────────────────────
# Enumerations
# ─────────────────────────────────────────────────────────────

class VaRMethod(str, Enum):
    PARAMETRIC = "PARAMETRIC"
    HISTORICAL_SIMULATION = "HISTORICAL_SIMULATION"
    MONTE_CARLO = "MONTE_CARLO"


class TimeHorizon(str, Enum):
    ONE_DAY = "1D"
    ONE_WEEK = "1W"
    TWO_WEEKS = "2W"
    ONE_MONTH = "1M"
    THREE_MONTHS = "3M"
    SIX_MONTHS = "6M"
    ONE_YEAR = "1Y"

    @property
    def trading_days(self) -> int:
        return HORIZON_TRADING_DAYS[self.value]


class AssetClass(str, Enum):
    EQUITY = "EQUITY"
    FIXED_INCOME = "FIXED_INCOME"
    COMMODITY = "COMMODITY"
    CASH = "CASH"
    ALTERNATIVE = "ALTERNATIVE"
    DERIVATIVE = "DERIVATIVE"


class FactorType(str, Enum):
    EQUITY_INDEX = "EQUITY_INDEX"
    INTEREST_RATE = "INTEREST_RATE"
    CREDIT_SPREAD = "CREDIT_SPREAD"
    CURRENCY = "CURRENCY"
    COMMODITY = "COMMODITY"
    VOLATILITY = "VOLATILITY"


class ShockType(str, Enum):
    RELATIVE = "RELATIVE"
    ABSOLUTE = "ABSOLUTE"


def _coerce_enum(enum_cls, value, field_name: str, error: Optional[Callable] = None):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).upper())
    except ValueError:
        if error is not None:
            raise error(value) from None
        raise InputValidationError(
            field_name, f"{value!r} is not a valid {enum_cls.__name__}"
        ) from None


def validate_confidence_level(confidence_level: float) -> float:
    """Return the canonical confidence level or raise."""
    for level in SUPPORTED_CONFIDENCE_LEVELS:
        if math.isclose(float(confidence_level), level, abs_tol=1e-12):
            return level
    raise UnsupportedConfidenceLevelError(confidence_level)


def _frozen_array(values, field_name: str, ndim: int) -> np.ndarray:
    arr = np.array(values, dtype=float)
    if arr.ndim != ndim:
        raise InputValidationError(field_name, f"expected a {ndim}-D array, got {arr.ndim}-D")
    if not np.all(np.isfinite(arr)):
        raise InputValidationError(field_name, "contains non-finite values")
    arr.setflags(write=False)
    return arr


# ─────────────────────────────────────────────────────────────
# Portfolio inputs
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Position:
    """One holding in a portfolio snapshot."""

    id: str
    instrument_id: str
    symbol: str
    market_value: float
    asset_class: str
    sector: str = "UNKNOWN"
    geography: str = "UNKNOWN"
    currency: str = "USD"
    maturity_date: Optional[date] = None
    credit_rating: Optional[str] = None
    instrument_type: Optional[str] = None

    def category(self, name: str) -> str:
        value = getattr(self, name, None)
        if value is None or value == "":
            return "UNKNOWN"
        return str(value.value if isinstance(value, Enum) else value)


@dataclass(frozen=True)
class PortfolioSnapshot:
    """Positions held by a portfolio as of a fixed date."""

    portfolio_id: str
    as_of_date: date
    positions: Tuple[Position, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "positions", tuple(self.positions))

    def validate(self) -> "PortfolioSnapshot":
        """Check the snapshot invariants, returning self for chaining."""
        if not self.positions:
            raise EmptyPortfolioError()
        ids = [p.id for p in self.positions]
        if len(set(ids)) != len(ids):
            raise InputValidationError("positions", "duplicate position ids")
        values = np.array([p.market_value for p in self.positions], dtype=float)
        if not np.all(np.isfinite(values)):
            bad = [p.id for p in self.positions if not math.isfinite(p.market_value)]
            raise InputValidationError("market_value", f"non-finite market value for {bad}")
        return self

    @property
    def total_value(self) -> float:
        return float(sum(p.market_value for p in self.positions))

    @property
    def gross_value(self) -> float:
        return float(sum(abs(p.market_value) for p in self.positions))

    @property
    def instrument_ids(self) -> Tuple[str, ...]:
        """Distinct instrument ids in position order."""
        return tuple(dict.fromkeys(p.instrument_id for p in self.positions))

    def market_values(self) -> np.ndarray:
        return np.array([p.market_value for p in self.positions], dtype=float)


@dataclass(frozen=True, eq=False)
class RiskFactorModel:
    """
    Per-asset drift, volatility and correlation.

    Expected returns and volatilities are annualized. The correlation matrix
    must be square, symmetric and carry a unit diagonal; positive
    definiteness is checked later by Cholesky factorization.
    """

    asset_ids: Tuple[str, ...]
    expected_returns: np.ndarray
    volatilities: np.ndarray
    correlation_matrix: np.ndarray

    def __post_init__(self) -> None:
        object.__setattr__(self, "asset_ids", tuple(self.asset_ids))
        n = len(self.asset_ids)
        if n == 0:
            raise InputValidationError("asset_ids", "factor model has no assets")
        if len(set(self.asset_ids)) != n:
            raise InputValidationError("asset_ids", "duplicate asset ids")

        mu = _frozen_array(self.expected_returns, "expected_returns", 1)
        vol = _frozen_array(self.volatilities, "volatilities", 1)
        corr = _frozen_array(self.correlation_matrix, "correlation_matrix", 2)

        if mu.shape != (n,):
            raise InputValidationError("expected_returns", f"expected {n} entries, got {mu.shape[0]}")
        if vol.shape != (n,):
            raise InputValidationError("volatilities", f"expected {n} entries, got {vol.shape[0]}")
        if np.any(vol < 0):
            raise InputValidationError("volatilities", "volatilities must be non-negative")
        if corr.shape != (n, n):
            raise InputValidationError("correlation_matrix", f"expected shape ({n}, {n}), got {corr.shape}")
        if not np.allclose(corr, corr.T, atol=SYMMETRY_TOLERANCE):
            raise InputValidationError("correlation_matrix", "matrix is not symmetric")
        if not np.allclose(np.diag(corr), 1.0, atol=SYMMETRY_TOLERANCE):
            raise InputValidationError("correlation_matrix", "diagonal must be 1")

        object.__setattr__(self, "expected_returns", mu)
        object.__setattr__(self, "volatilities", vol)
        object.__setattr__(self, "correlation_matrix", corr)

    def index_of(self, asset_id: str) -> int:
        try:
            return self.asset_ids.index(asset_id)
        except ValueError:
            raise InputValidationError(
                "asset_ids", f"no factor model entry for instrument {asset_id!r}"
            ) from None

    def subset(self, asset_ids: Sequence[str]) -> "RiskFactorModel":
        """Restrict the model to ``asset_ids`` in the given order."""
        idx = [self.index_of(a) for a in asset_ids]
        return RiskFactorModel(
            asset_ids=tuple(asset_ids),
            expected_returns=self.expected_returns[idx],
            volatilities=self.volatilities[idx],
            correlation_matrix=self.correlation_matrix[np.ix_(idx, idx)],
        )

    def covariance_matrix(self, periods_per_year: int = 1) -> np.ndarray:
        """
        Covariance matrix D·ρ·D, optionally de-annualized.

        Parameters
        ----------
        periods_per_year : int
            1 returns the annual covariance; 252 returns daily covariance.
        """
        d = np.diag(self.volatilities)
        return d @ self.correlation_matrix @ d / periods_per_year

    def daily_covariance(self) -> np.ndarray:
        return self.covariance_matrix(TRADING_DAYS_PER_YEAR)


# ─────────────────────────────────────────────────────────────
# Requests
# ─────────────────────────────────────────────────────────────

def _check_seed(seed: Optional[int]) -> None:
    if seed is not None and (not isinstance(seed, (int, np.integer)) or seed < 0):
        raise InputValidationError("seed", "seed must be a non-negative integer")


def _check_workers(max_workers: int) -> None:
    if max_workers < 1:
        raise InputValidationError("max_workers", "max_workers must be at least 1")


@dataclass(frozen=True)
class MonteCarloRequest:
    number_of_paths: int = DEFAULT_NUM_SIMULATIONS
    time_horizon: TimeHorizon = TimeHorizon.ONE_DAY
    seed: Optional[int] = None
    include_jump_risk: bool = False
    jump_intensity: float = DEFAULT_JUMP_INTENSITY
    jump_mean: float = DEFAULT_JUMP_MEAN
    jump_std: float = DEFAULT_JUMP_STD
    max_workers: int = DEFAULT_MAX_WORKERS

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "time_horizon", _coerce_enum(TimeHorizon, self.time_horizon, "time_horizon")
        )
        _check_seed(self.seed)
        _check_workers(self.max_workers)
        if self.jump_intensity < 0 or self.jump_std < 0:
            raise InputValidationError("jump_intensity", "jump parameters must be non-negative")


@dataclass(frozen=True)
class VaRRequest:
    method: VaRMethod = VaRMethod.PARAMETRIC
    confidence_level: float = 0.99
    time_horizon: TimeHorizon = TimeHorizon.ONE_DAY
    include_backtest: bool = False
    backtest_period: int = DEFAULT_BACKTEST_PERIOD
    realized_returns: Optional[Tuple[float, ...]] = None
    monte_carlo_paths: int = DEFAULT_NUM_SIMULATIONS
    seed: Optional[int] = None
    max_workers: int = DEFAULT_MAX_WORKERS

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "method", _coerce_enum(VaRMethod, self.method, "method", UnsupportedMethodError)
        )
        object.__setattr__(self, "confidence_level", validate_confidence_level(self.confidence_level))
        object.__setattr__(
            self, "time_horizon", _coerce_enum(TimeHorizon, self.time_horizon, "time_horizon")
        )
        if self.realized_returns is not None:
            object.__setattr__(
                self, "realized_returns", tuple(float(r) for r in self.realized_returns)
            )
        if self.backtest_period < 1:
            raise InputValidationError("backtest_period", "backtest_period must be positive")
        _check_seed(self.seed)
        _check_workers(self.max_workers)


@dataclass(frozen=True)
class FactorShock:
    factor_type: FactorType
    factor_name: str
    shock_type: ShockType
    shock_value: float
    region: Optional[str] = None
    currency: Optional[str] = None
    maturity: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "factor_type", _coerce_enum(FactorType, self.factor_type, "factor_type")
        )
        object.__setattr__(
            self, "shock_type", _coerce_enum(ShockType, self.shock_type, "shock_type")
        )
        if not math.isfinite(self.shock_value):
            raise InputValidationError("shock_value", "shock value must be finite")

    @property
    def key(self) -> str:
        return f"{self.factor_type.value}_{self.factor_name}"


@dataclass(frozen=True)
class HistoricalPeriod:
    start_date: date
    end_date: date
    event_name: str


@dataclass(frozen=True)
class StressScenario:
    id: str
    name: str
    factor_shocks: Tuple[FactorShock, ...]
    description: str = ""
    scenario_type: str = "CUSTOM"
    probability: Optional[float] = None
    historical_period: Optional[HistoricalPeriod] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "factor_shocks", tuple(self.factor_shocks))


@dataclass(frozen=True)
class PositionSensitivity:
    """Per-position overrides for the stress sensitivity lookups."""

    beta: Optional[float] = None
    duration: Optional[float] = None
    credit_duration: Optional[float] = None
    vega: Optional[float] = None


@dataclass(frozen=True)
class StressTestRequest:
    include_historical_scenarios: bool = False
    confidence_level: float = 0.99
    sensitivities: Mapping[str, PositionSensitivity] = field(default_factory=dict)
    max_workers: int = DEFAULT_MAX_WORKERS

    def __post_init__(self) -> None:
        object.__setattr__(self, "confidence_level", validate_confidence_level(self.confidence_level))
        object.__setattr__(self, "sensitivities", MappingProxyType(dict(self.sensitivities)))
        _check_workers(self.max_workers)


@dataclass(frozen=True)
class CorrelationAnalysisRequest:
    include_asset_classes: bool = False
    include_sectors: bool = False
    include_geographies: bool = False
    number_of_components: int = DEFAULT_PCA_COMPONENTS
    method: str = "PEARSON"
    seed: int = DEFAULT_SEED

    def __post_init__(self) -> None:
        method = str(self.method).upper()
        if method not in ("PEARSON", "SPEARMAN"):
            raise InputValidationError("method", f"unsupported correlation method {self.method!r}")
        object.__setattr__(self, "method", method)
        if self.number_of_components < 1:
            raise InputValidationError("number_of_components", "must request at least one component")
        _check_seed(self.seed)


# ─────────────────────────────────────────────────────────────
# Monte Carlo results
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class PercentileResult:
    percentile: int
    value: float


@dataclass(frozen=True)
class ConvergenceTest:
    has_converged: bool
    standard_error: float
    convergence_threshold: float
    confidence_interval: Tuple[float, float]
    batch_means: Tuple[float, ...]


@dataclass(frozen=True)
class MonteCarloResult:
    portfolio_id: str
    as_of_date: date
    number_of_paths: int
    time_horizon: TimeHorizon
    expected_return: float
    standard_deviation: float
    skewness: float
    kurtosis: float
    var95: float
    var99: float
    cvar95: float
    cvar99: float
    expected_shortfall: float
    percentiles: Tuple[PercentileResult, ...]
    max_drawdown: float
    time_to_recovery: float
    probability_of_loss: float
    convergence_test: ConvergenceTest


# ─────────────────────────────────────────────────────────────
# VaR results
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ComponentVaR:
    component_type: str
    component_name: str
    var: float
    standalone_var: float
    percent_of_total: float
    correlation: float


@dataclass(frozen=True)
class MarginalVaR:
    position_id: str
    instrument_id: str
    symbol: str
    marginal_var: float
    contribution: float
    percent_contribution: float


@dataclass(frozen=True)
class IncrementalVaR:
    position_id: str
    instrument_id: str
    symbol: str
    incremental_var: float
    var_with: float
    var_without: float


@dataclass(frozen=True)
class DecompositionError:
    decomposition: str
    key: str
    message: str


@dataclass(frozen=True)
class HypothesisTestResult:
    test_statistic: float
    critical_value: float
    p_value: float
    reject_null: bool


@dataclass(frozen=True)
class BacktestResult:
    observations: int
    number_of_exceptions: int
    exception_rate: float
    expected_exception_rate: float
    kupiec_test: HypothesisTestResult
    christoffersen_test: HypothesisTestResult
    is_model_accurate: bool


@dataclass(frozen=True)
class ModelAssumptions:
    distribution_assumption: str
    correlation_model: str
    volatility_model: str
    lookback_period: int
    data_frequency: str = "DAILY"


@dataclass(frozen=True)
class VaRResult:
    portfolio_id: str
    as_of_date: date
    method: VaRMethod
    confidence_level: float
    time_horizon: TimeHorizon
    portfolio_value: float
    total_var: float
    diversified_var: float
    undiversified_var: float
    diversification_benefit: float
    component_var: Tuple[ComponentVaR, ...]
    marginal_var: Tuple[MarginalVaR, ...]
    incremental_var: Tuple[IncrementalVaR, ...]
    backtest: Optional[BacktestResult]
    model_accuracy: float
    assumptions: ModelAssumptions
    decomposition_errors: Tuple[DecompositionError, ...] = ()


# ─────────────────────────────────────────────────────────────
# Stress test results
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class PositionImpact:
    position_id: str
    instrument_id: str
    symbol: str
    current_value: float
    stressed_value: float
    absolute_change: float
    percent_change: float
    contribution_to_portfolio_change: float


@dataclass(frozen=True)
class CorrelationChange:
    asset1: str
    asset2: str
    base_correlation: float
    stressed_correlation: float
    correlation_change: float


@dataclass(frozen=True)
class ScenarioResult:
    scenario_id: str
    scenario_name: str
    portfolio_value: float
    portfolio_change: float
    portfolio_change_percent: float
    position_impacts: Tuple[PositionImpact, ...]
    var_under_scenario: float
    volatility_under_scenario: float
    correlation_changes: Tuple[CorrelationChange, ...]


@dataclass(frozen=True)
class FactorSensitivity:
    factor_name: str
    factor_type: FactorType
    sensitivity: float
    intercept: float
    contribution: float
    percent_contribution: float


@dataclass(frozen=True)
class StressTestResult:
    portfolio_id: str
    as_of_date: date
    scenario_results: Tuple[ScenarioResult, ...]
    worst_case_scenario: ScenarioResult
    best_case_scenario: ScenarioResult
    average_impact: float
    stressed_var: float
    stressed_volatility: float
    max_drawdown: float
    factor_sensitivities: Tuple[FactorSensitivity, ...]


# ─────────────────────────────────────────────────────────────
# Correlation analysis results
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ComponentLoading:
    asset_id: str
    loading: float


@dataclass(frozen=True)
class PrincipalComponent:
    component_number: int
    eigenvalue: float
    variance_explained: float
    cumulative_variance_explained: float
    loadings: Tuple[ComponentLoading, ...]
    converged: bool


@dataclass(frozen=True, eq=False)
class CorrelationMatrix:
    assets: Tuple[str, ...]
    matrix: np.ndarray
    eigenvalues: Tuple[float, ...]
    principal_components: Tuple[PrincipalComponent, ...]


@dataclass(frozen=True)
class CategoryConcentration:
    category: str
    percentage: float
    rank: int


@dataclass(frozen=True)
class ConcentrationMetrics:
    herfindahl_index: float
    top5_concentration: float
    top10_concentration: float
    effective_number_of_positions: float
    asset_class_concentration: Tuple[CategoryConcentration, ...]
    sector_concentration: Tuple[CategoryConcentration, ...]
    geography_concentration: Tuple[CategoryConcentration, ...]
    currency_concentration: Tuple[CategoryConcentration, ...]

    @property
    def category_concentrations(self) -> Dict[str, Tuple[CategoryConcentration, ...]]:
        return {
            "asset_class": self.asset_class_concentration,
            "sector": self.sector_concentration,
            "geography": self.geography_concentration,
            "currency": self.currency_concentration,
        }


@dataclass(frozen=True)
class RiskContribution:
    position_id: str
    symbol: str
    risk_contribution: float
    percent_contribution: float
    marginal_risk: float


@dataclass(frozen=True, eq=False)
class CorrelationAnalysisResult:
    portfolio_id: str
    as_of_date: date
    lookback_period: int
    position_correlations: CorrelationMatrix
    asset_class_correlations: Optional[CorrelationMatrix]
    sector_correlations: Optional[CorrelationMatrix]
    geography_correlations: Optional[CorrelationMatrix]
    concentration_metrics: ConcentrationMetrics
    portfolio_volatility: float
    diversification_ratio: Optional[float]
    effective_number_of_bets: float
    risk_contributions: Tuple[RiskContribution, ...]
    warnings: Tuple[str, ...] = ()


# ─────────────────────────────────────────────────────────────
# Serialization
# ─────────────────────────────────────────────────────────────

def to_serializable(obj: Any) -> Any:
    """Convert result records into JSON-friendly builtins."""
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return {f.name: to_serializable(getattr(obj, f.name)) for f in dataclasses.fields(obj)}
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, (np.floating, np.integer)):
        return obj.item()
    if isinstance(obj, date):
        return obj.isoformat()
    if isinstance(obj, Mapping):
        return {str(k): to_serializable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [to_serializable(v) for v in obj]
    return obj
