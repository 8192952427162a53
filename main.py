"""
Portfolio Risk Engine — Main Orchestrator
=========================================
Entry point for the complete risk analysis pipeline.

Execution Flow:
    1. Fetch / load price data
    2. Returns, portfolio snapshot and factor model estimation
    3. VaR by all three methods with decompositions
    4. Monte Carlo return distribution
    5. Rolling-window backtesting with Kupiec / Christoffersen tests
    6. Historical scenario stress testing
    7. Correlation, concentration and PCA analysis
    8. Visualization
    9. Results export
"""

import json
import sys
from pathlib import Path

import pandas as pd

# ─────────────────────────────────────────────────────────────
# Add project root to path
# ─────────────────────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parent
sys.path.insert(0, str(PROJECT_ROOT))

from portfolio_risk.backtesting import run_full_backtest
from portfolio_risk.correlation import CorrelationAnalyzer
from portfolio_risk.logging_config import configure_logging
from portfolio_risk.models import (
    CorrelationAnalysisRequest,
    MonteCarloRequest,
    StressTestRequest,
    TimeHorizon,
    VaRMethod,
    VaRRequest,
    to_serializable,
)
from portfolio_risk.monte_carlo import MonteCarloEngine
from portfolio_risk.portfolio import (
    DEFAULT_TICKERS,
    asset_exposures,
    base_value,
    build_risk_factor_model,
    build_snapshot,
    compute_log_returns,
    compute_portfolio_returns,
    compute_simple_returns,
    define_weights,
    fetch_data,
    get_portfolio_summary,
    load_data,
)
from portfolio_risk.risk_metrics import historical_risk_metrics, parametric_risk_metrics
from portfolio_risk.stress_testing import StressTestEngine
from portfolio_risk.var_engine import VaREngine
from portfolio_risk.visualization import (
    plot_component_var,
    plot_correlation_heatmap,
    plot_pca_scree,
    plot_return_distribution,
    plot_rolling_var_vs_losses,
    plot_stress_comparison,
)

# ─────────────────────────────────────────────────────────────
# Configuration
# ─────────────────────────────────────────────────────────────
DATA_PATH = PROJECT_ROOT / "data" / "raw_prices.csv"
RESULTS_DIR = PROJECT_ROOT / "results"
FIGURES_DIR = RESULTS_DIR / "figures"
TABLES_DIR = RESULTS_DIR / "tables"

PORTFOLIO_ID = "DESK-01"
NOTIONAL = 10_000_000.0
NUM_SIMULATIONS = 100_000
RANDOM_SEED = 42
BACKTEST_WINDOW = 250
CONFIDENCE_LEVEL = 0.99
MAX_WORKERS = 4


def print_header(text: str) -> None:
    """Print formatted section header."""
    width = 60
    print("\n" + "=" * width)
    print(f"  {text}")
    print("=" * width)


def print_metrics(metrics: dict, indent: int = 4) -> None:
    """Print dictionary of metrics with formatting."""
    prefix = " " * indent
    for key, val in metrics.items():
        if isinstance(val, float):
            print(f"{prefix}{key:.<35} {val:>14.6f}")
        else:
            print(f"{prefix}{key:.<35} {str(val):>14}")


def main() -> None:
    """Execute the complete risk engine pipeline."""
    configure_logging()

    print("\n" + "╔" + "═" * 58 + "╗")
    print("║   PORTFOLIO RISK ENGINE                                  ║")
    print("║   VaR · Monte Carlo · Stress · Correlation               ║")
    print("╚" + "═" * 58 + "╝")

    # ── PHASE 1: Data & Portfolio ──────────────────────────────
    print_header("PHASE 1 — DATA ACQUISITION & PORTFOLIO CONSTRUCTION")

    if DATA_PATH.exists():
        print(f"  Loading cached data from {DATA_PATH}")
        prices = load_data(str(DATA_PATH))
    else:
        print(f"  Fetching price data for: {DEFAULT_TICKERS}")
        DATA_PATH.parent.mkdir(parents=True, exist_ok=True)
        prices = fetch_data(save_path=str(DATA_PATH))

    weights = define_weights()
    log_returns = compute_log_returns(prices)
    simple_returns = compute_simple_returns(prices)
    snapshot = build_snapshot(PORTFOLIO_ID, prices.index[-1].date(), weights, NOTIONAL)

    print(f"\n  Assets:        {list(weights.index)}")
    print(f"  Weights:       {weights.round(4).to_dict()}")
    print(f"  Period:        {prices.index[0].date()} → {prices.index[-1].date()}")
    print(f"  Observations:  {len(simple_returns)}")
    print(f"  Notional:      {NOTIONAL:,.0f}")

    summary = get_portfolio_summary(snapshot, simple_returns)
    print("\n  Portfolio Summary:")
    print_metrics(summary)

    # ── PHASE 2: Factor Model ─────────────────────────────────
    print_header("PHASE 2 — FACTOR MODEL ESTIMATION")

    factor_model = build_risk_factor_model(log_returns, snapshot.instrument_ids)

    print("\n  Annualized Drift / Volatility:")
    for asset, mu, sigma in zip(
        factor_model.asset_ids, factor_model.expected_returns, factor_model.volatilities
    ):
        print(f"    {asset:<6} μ = {mu:>9.4f}   σ = {sigma:>8.4f}")

    print("\n  Correlation Matrix:")
    corr_df = pd.DataFrame(
        factor_model.correlation_matrix,
        index=factor_model.asset_ids,
        columns=factor_model.asset_ids,
    )
    print(corr_df.to_string(float_format=lambda x: f"{x:.4f}"))

    # ── PHASE 3: VaR ──────────────────────────────────────────
    print_header("PHASE 3 — VALUE AT RISK (99%, 1-DAY)")

    port_returns = compute_portfolio_returns(simple_returns[list(weights.index)], weights.values)
    print("\n  Return-space VaR / ES (fraction of portfolio):")
    print_metrics(historical_risk_metrics(port_returns))
    print_metrics(parametric_risk_metrics(port_returns.mean(), port_returns.std()))

    var_engine = VaREngine()
    var_results = {}
    for method in VaRMethod:
        request = VaRRequest(
            method=method,
            confidence_level=CONFIDENCE_LEVEL,
            time_horizon=TimeHorizon.ONE_DAY,
            include_backtest=True,
            monte_carlo_paths=NUM_SIMULATIONS // 10,
            seed=RANDOM_SEED,
            max_workers=MAX_WORKERS,
        )
        result = var_engine.calculate_var(
            snapshot, factor_model, simple_returns, request
        )
        var_results[method.value] = result

        print(f"\n  ┌─ {method.value} {'─' * (44 - len(method.value))}┐")
        print_metrics({
            "total_var": result.total_var,
            "undiversified_var": result.undiversified_var,
            "diversification_benefit": result.diversification_benefit,
            "model_accuracy": result.model_accuracy,
            "backtest_exceptions": result.backtest.number_of_exceptions,
            "kupiec_reject": result.backtest.kupiec_test.reject_null,
            "christoffersen_reject": result.backtest.christoffersen_test.reject_null,
        })
        for component in result.component_var:
            print(
                f"      {component.component_name:<14} "
                f"{component.var:>14,.2f}  ({component.percent_of_total:6.2f}%)"
            )
        for error in result.decomposition_errors:
            print(f"      ! {error.decomposition} {error.key}: {error.message}")

    # ── PHASE 4: Monte Carlo ──────────────────────────────────
    print_header("PHASE 4 — MONTE CARLO RETURN DISTRIBUTION")

    mc_engine = MonteCarloEngine()
    mc_request = MonteCarloRequest(
        number_of_paths=NUM_SIMULATIONS,
        time_horizon=TimeHorizon.ONE_DAY,
        seed=RANDOM_SEED,
        max_workers=MAX_WORKERS,
    )
    print(f"    Running {NUM_SIMULATIONS:,} simulations...")
    mc_result = mc_engine.simulate(snapshot, factor_model, mc_request)
    print_metrics({
        "expected_return": mc_result.expected_return,
        "standard_deviation": mc_result.standard_deviation,
        "var95": mc_result.var95,
        "var99": mc_result.var99,
        "cvar95": mc_result.cvar95,
        "cvar99": mc_result.cvar99,
        "probability_of_loss_pct": mc_result.probability_of_loss,
        "converged": mc_result.convergence_test.has_converged,
    })

    # Same seed, same trials: the histogram shows exactly the summarized sample.
    asset_ids, asset_returns = mc_engine.simulate_asset_returns(
        snapshot, factor_model, mc_request
    )
    mc_weights = asset_exposures(snapshot, asset_ids) / base_value(snapshot)
    simulated_returns = asset_returns @ mc_weights

    # ── PHASE 5: Backtesting ──────────────────────────────────
    print_header("PHASE 5 — ROLLING-WINDOW BACKTESTING")

    print(f"  Window: {BACKTEST_WINDOW} days | Confidence: {CONFIDENCE_LEVEL:.0%}")
    bt_results, breach_stats, backtest = run_full_backtest(
        simple_returns[list(weights.index)], weights.values, BACKTEST_WINDOW, CONFIDENCE_LEVEL
    )

    print("\n  Breach Statistics:")
    print_metrics(breach_stats)

    print("\n  Coverage Tests:")
    print_metrics({
        "kupiec_lr": backtest.kupiec_test.test_statistic,
        "kupiec_p_value": backtest.kupiec_test.p_value,
        "christoffersen_lr": backtest.christoffersen_test.test_statistic,
        "christoffersen_p_value": backtest.christoffersen_test.p_value,
        "model_accurate": backtest.is_model_accurate,
    })

    # ── PHASE 6: Stress Testing ───────────────────────────────
    print_header("PHASE 6 — STRESS TESTING")

    stress_result = StressTestEngine().execute_stress_test(
        snapshot,
        factor_model,
        request=StressTestRequest(
            include_historical_scenarios=True,
            confidence_level=CONFIDENCE_LEVEL,
            max_workers=MAX_WORKERS,
        ),
    )
    for scenario in stress_result.scenario_results:
        print(f"\n  ┌─ {scenario.scenario_name}")
        print_metrics({
            "portfolio_change": scenario.portfolio_change,
            "portfolio_change_pct": scenario.portfolio_change_percent,
            "var_under_scenario": scenario.var_under_scenario,
            "volatility_under_scenario": scenario.volatility_under_scenario,
        })
    print("\n  Summary:")
    print_metrics({
        "worst_case": stress_result.worst_case_scenario.scenario_id,
        "average_impact": stress_result.average_impact,
        "stressed_var": stress_result.stressed_var,
        "stressed_volatility_pct": stress_result.stressed_volatility,
    })

    # ── PHASE 7: Correlation Analysis ─────────────────────────
    print_header("PHASE 7 — CORRELATION & CONCENTRATION")

    corr_result = CorrelationAnalyzer().analyze(
        snapshot,
        simple_returns,
        CorrelationAnalysisRequest(include_asset_classes=True, seed=RANDOM_SEED),
    )
    concentration = corr_result.concentration_metrics
    print_metrics({
        "portfolio_volatility": corr_result.portfolio_volatility,
        "diversification_ratio": corr_result.diversification_ratio,
        "effective_number_of_bets": corr_result.effective_number_of_bets,
        "herfindahl_index": concentration.herfindahl_index,
        "effective_number_of_positions": concentration.effective_number_of_positions,
    })
    print("\n  Principal Components:")
    for pc in corr_result.position_correlations.principal_components:
        print(
            f"    PC{pc.component_number}  λ = {pc.eigenvalue:7.4f}  "
            f"{pc.variance_explained:6.2f}%  (cum {pc.cumulative_variance_explained:6.2f}%)"
        )
    for warning in corr_result.warnings:
        print(f"    ! {warning}")

    # ── PHASE 8: Visualization ────────────────────────────────
    print_header("PHASE 8 — GENERATING VISUALIZATIONS")

    fig_dir = str(FIGURES_DIR)
    paths = [
        plot_return_distribution(simulated_returns, mc_result, output_dir=fig_dir),
        plot_rolling_var_vs_losses(bt_results, CONFIDENCE_LEVEL, output_dir=fig_dir),
        plot_correlation_heatmap(corr_result.position_correlations, output_dir=fig_dir),
        plot_pca_scree(corr_result.position_correlations, output_dir=fig_dir),
        plot_stress_comparison(stress_result, output_dir=fig_dir),
        plot_component_var(var_results[VaRMethod.PARAMETRIC.value], output_dir=fig_dir),
    ]
    for p in paths:
        print(f"  ✓ {p}")

    # ── Results Summary Table ─────────────────────────────────
    print_header("RESULTS COMPARISON TABLE")

    comparison = pd.DataFrame({
        "Method": list(var_results.keys()),
        "VaR": [r.total_var for r in var_results.values()],
        "Undiversified VaR": [r.undiversified_var for r in var_results.values()],
        "Exceptions": [r.backtest.number_of_exceptions for r in var_results.values()],
        "Model Accuracy": [r.model_accuracy for r in var_results.values()],
    })
    print("\n" + comparison.to_string(index=False, float_format=lambda x: f"{x:,.4f}"))

    TABLES_DIR.mkdir(parents=True, exist_ok=True)
    comparison.to_csv(TABLES_DIR / "var_comparison.csv", index=False)

    # ── Save all results as JSON ──────────────────────────────
    all_results = {
        "portfolio": {
            "snapshot": to_serializable(snapshot),
            "summary": summary,
        },
        "var": to_serializable(var_results),
        "monte_carlo": to_serializable(mc_result),
        "backtesting": {
            "breach_stats": breach_stats,
            "result": to_serializable(backtest),
        },
        "stress_testing": to_serializable(stress_result),
        "correlation": to_serializable(corr_result),
    }

    results_path = TABLES_DIR / "full_results.json"
    with open(results_path, "w") as f:
        json.dump(all_results, f, indent=2, default=str)

    print(f"\n  Results saved to: {results_path}")

    print("\n" + "╔" + "═" * 58 + "╗")
    print("║   RISK ENGINE EXECUTION COMPLETE                         ║")
    print("╚" + "═" * 58 + "╝\n")


if __name__ == "__main__":
    main()
