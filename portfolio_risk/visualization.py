"""
Visualization Module
====================
Static charts for the risk report.

Generated Figures:
    1. Monte Carlo Return Distribution (Histogram with VaR/CVaR)
    2. Rolling VaR vs Actual Losses
    3. Correlation Heatmap
    4. PCA Scree Plot
    5. Stress Scenario Comparison
    6. Component VaR by Asset Class
"""

from pathlib import Path

import matplotlib.pyplot as plt
import matplotlib.ticker as mtick
import numpy as np
import pandas as pd
import seaborn as sns

from portfolio_risk.models import (
    CorrelationMatrix,
    MonteCarloResult,
    StressTestResult,
    VaRResult,
)


# ─────────────────────────────────────────────────────────────
# Style Configuration
# ─────────────────────────────────────────────────────────────
plt.rcParams.update({
    "figure.figsize": (12, 7),
    "figure.dpi": 150,
    "font.size": 11,
    "font.family": "serif",
    "axes.grid": True,
    "grid.alpha": 0.3,
    "axes.spines.top": False,
    "axes.spines.right": False,
})

COLORS = {
    "primary": "#1f77b4",
    "var_95": "#ff7f0e",
    "var_99": "#d62728",
    "es": "#9467bd",
    "breach": "#e74c3c",
    "safe": "#2ecc71",
}


def save_figure(fig: plt.Figure, name: str, output_dir: str = "results/figures") -> str:
    """Save figure to disk and return the path."""
    path = Path(output_dir)
    path.mkdir(parents=True, exist_ok=True)
    filepath = path / f"{name}.png"
    fig.savefig(filepath, bbox_inches="tight", facecolor="white")
    plt.close(fig)
    return str(filepath)


def plot_return_distribution(
    returns: np.ndarray,
    result: MonteCarloResult,
    output_dir: str = "results/figures",
) -> str:
    """
    Histogram of simulated portfolio returns with VaR and CVaR lines.

    Parameters
    ----------
    returns : np.ndarray
        Simulated portfolio returns behind ``result``.
    result : MonteCarloResult
        Supplies the VaR/CVaR figures and the horizon for the title.
    output_dir : str
        Output directory for the figure.

    Returns
    -------
    str
        Path to saved figure.
    """
    fig, ax = plt.subplots(figsize=(14, 7))

    ax.hist(
        returns, bins=200, density=True,
        color=COLORS["primary"], alpha=0.7, edgecolor="none",
        label=f"Simulated returns (n={result.number_of_paths:,})",
    )

    ax.axvline(-result.var95, color=COLORS["var_95"], linewidth=2,
               linestyle="--", label=f"95% VaR = {result.var95:.4f}")
    ax.axvline(-result.var99, color=COLORS["var_99"], linewidth=2,
               linestyle="--", label=f"99% VaR = {result.var99:.4f}")
    ax.axvline(-result.cvar99, color=COLORS["es"], linewidth=2,
               linestyle=":", label=f"99% CVaR = {result.cvar99:.4f}")

    ax.set_xlabel("Portfolio Return", fontsize=12)
    ax.set_ylabel("Density", fontsize=12)
    ax.set_title(
        f"Monte Carlo Simulated {result.time_horizon.value} Return Distribution",
        fontsize=14, fontweight="bold",
    )
    ax.legend(fontsize=11, loc="upper right")
    ax.xaxis.set_major_formatter(mtick.PercentFormatter(1.0))

    return save_figure(fig, "mc_return_distribution", output_dir)


def plot_rolling_var_vs_losses(
    backtest_results: pd.DataFrame,
    confidence_level: float = 0.99,
    output_dir: str = "results/figures",
) -> str:
    """
    Plot rolling VaR predictions vs actual portfolio losses.

    Parameters
    ----------
    backtest_results : pd.DataFrame
        Output of ``backtesting.rolling_var_backtest``.
    confidence_level : float
        Confidence level used for the forecasts (legend only).
    """
    fig, ax = plt.subplots(figsize=(16, 7))

    dates = backtest_results["date"]
    losses = backtest_results["actual_loss"]
    breaches = backtest_results["breach"].astype(bool)

    ax.plot(dates, losses, color=COLORS["primary"], alpha=0.5,
            linewidth=0.8, label="Actual Daily Loss")
    ax.plot(dates, backtest_results["predicted_var"], color=COLORS["var_99"],
            linewidth=1.5, label=f"{confidence_level:.0%} VaR Forecast")
    ax.scatter(dates[breaches], losses[breaches], color=COLORS["breach"],
               s=30, zorder=5, label=f"Breaches (n={int(breaches.sum())})")

    ax.set_xlabel("Date", fontsize=12)
    ax.set_ylabel("Loss (as fraction of portfolio)", fontsize=12)
    ax.set_title("Rolling VaR Backtest — Predicted vs Actual Losses",
                 fontsize=14, fontweight="bold")
    ax.legend(fontsize=11)
    ax.yaxis.set_major_formatter(mtick.PercentFormatter(1.0))
    fig.autofmt_xdate()

    return save_figure(fig, "rolling_var_backtest", output_dir)


def plot_correlation_heatmap(
    correlation: CorrelationMatrix,
    name: str = "correlation_heatmap",
    output_dir: str = "results/figures",
) -> str:
    """Lower-triangle annotated heatmap of a correlation matrix."""
    fig, ax = plt.subplots(figsize=(9, 7))

    matrix = np.asarray(correlation.matrix)
    mask = np.triu(np.ones_like(matrix, dtype=bool), k=1)

    sns.heatmap(
        matrix,
        mask=mask,
        annot=True,
        fmt=".3f",
        cmap="RdYlBu_r",
        center=0,
        vmin=-1,
        vmax=1,
        square=True,
        linewidths=0.5,
        xticklabels=list(correlation.assets),
        yticklabels=list(correlation.assets),
        ax=ax,
        cbar_kws={"shrink": 0.8, "label": "Correlation"},
    )

    ax.set_title("Correlation Matrix", fontsize=14, fontweight="bold")

    return save_figure(fig, name, output_dir)


def plot_pca_scree(
    correlation: CorrelationMatrix,
    output_dir: str = "results/figures",
) -> str:
    """Variance explained per principal component with the cumulative line."""
    fig, ax = plt.subplots(figsize=(10, 6))

    components = correlation.principal_components
    x = np.arange(1, len(components) + 1)
    explained = [pc.variance_explained for pc in components]
    cumulative = [pc.cumulative_variance_explained for pc in components]

    ax.bar(x, explained, color=COLORS["primary"], alpha=0.8, label="Variance explained")
    ax.plot(x, cumulative, color=COLORS["var_99"], marker="o", linewidth=2,
            label="Cumulative")

    ax.set_xlabel("Principal Component", fontsize=12)
    ax.set_ylabel("Variance Explained (%)", fontsize=12)
    ax.set_title("PCA Scree Plot", fontsize=14, fontweight="bold")
    ax.set_xticks(x)
    ax.set_ylim(0, 105)
    ax.legend(fontsize=11)

    return save_figure(fig, "pca_scree", output_dir)


def plot_stress_comparison(
    result: StressTestResult,
    output_dir: str = "results/figures",
) -> str:
    """Horizontal bar chart of portfolio change per scenario."""
    scenarios = sorted(result.scenario_results, key=lambda r: r.portfolio_change_percent)
    fig, ax = plt.subplots(figsize=(12, max(4, 0.8 * len(scenarios) + 2)))

    names = [r.scenario_name for r in scenarios]
    changes = [r.portfolio_change_percent / 100.0 for r in scenarios]
    colors = [COLORS["breach"] if c < 0 else COLORS["safe"] for c in changes]

    ax.barh(names, changes, color=colors, alpha=0.8)
    ax.axvline(0, color="black", linewidth=0.8)

    ax.set_xlabel("Portfolio Change", fontsize=12)
    ax.set_title("Stress Test Comparison — Scenario Impact",
                 fontsize=14, fontweight="bold")
    ax.xaxis.set_major_formatter(mtick.PercentFormatter(1.0))

    return save_figure(fig, "stress_comparison", output_dir)


def plot_component_var(
    result: VaRResult,
    output_dir: str = "results/figures",
) -> str:
    """Euler and standalone VaR per asset class."""
    fig, ax = plt.subplots(figsize=(12, 7))

    names = [c.component_name for c in result.component_var]
    x = np.arange(len(names))
    width = 0.35

    ax.bar(x - width / 2, [c.var for c in result.component_var], width,
           label="Component VaR", color=COLORS["primary"], alpha=0.8)
    ax.bar(x + width / 2, [c.standalone_var for c in result.component_var], width,
           label="Standalone VaR", color=COLORS["es"], alpha=0.8)

    ax.set_xlabel("Asset Class", fontsize=12)
    ax.set_ylabel("VaR (base currency)", fontsize=12)
    ax.set_title(
        f"VaR Decomposition — {result.method.value} "
        f"{result.confidence_level:.1%} {result.time_horizon.value}",
        fontsize=14, fontweight="bold",
    )
    ax.set_xticks(x)
    ax.set_xticklabels(names, fontsize=11)
    ax.legend(fontsize=11)

    return save_figure(fig, "component_var", output_dir)
