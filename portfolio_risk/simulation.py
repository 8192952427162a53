"""
Random Path Simulator
=====================
Correlated geometric Brownian motion with an optional compound-Poisson
jump component, one independent random stream per trial.

Mathematical Foundation:
    Box–Muller:  ε = sqrt(-2 ln U₁) · cos(2π U₂),  U₁ ∈ (0, 1], U₂ ∈ [0, 1)
    Correlation: z = L ε,  ρ = L Lᵀ
    GBM step:    S ← S · exp((μ - σ²/2) dt + σ √dt z + J)
    Jump:        J = 0 unless Bernoulli(λ dt) fires, then J ~ N(m_J, s_J²)
    Trial:       R = Σ w_i (S_i(T)/S_i(0) - 1),  w_i = MV_i / |V|

Reproducibility:
    Trial ``k`` draws from ``default_rng([entropy, k])``, so its output is
    the same no matter which worker runs it or in which order.
"""

from typing import Optional, Sequence

import numpy as np

from portfolio_risk.config import (
    DEFAULT_JUMP_INTENSITY,
    DEFAULT_JUMP_MEAN,
    DEFAULT_JUMP_STD,
    TRADING_DAYS_PER_YEAR,
)
from portfolio_risk.exceptions import InputValidationError
from portfolio_risk.linalg import cholesky_with_regularization
from portfolio_risk.models import RiskFactorModel


def box_muller(rng: np.random.Generator, size) -> np.ndarray:
    """
    Standard normal draws built from pairs of uniforms.

    Parameters
    ----------
    rng : np.random.Generator
        Source of uniforms.
    size : int or tuple
        Output shape.

    Returns
    -------
    np.ndarray
        Independent N(0, 1) variates of the requested shape.
    """
    count = int(np.prod(size))
    pairs = (count + 1) // 2
    u1 = 1.0 - rng.random(pairs)  # (0, 1] keeps the log finite
    u2 = rng.random(pairs)
    radius = np.sqrt(-2.0 * np.log(u1))
    angle = 2.0 * np.pi * u2
    z = np.concatenate([radius * np.cos(angle), radius * np.sin(angle)])
    return z[:count].reshape(size)


def trial_generator(entropy: int, trial_index: int) -> np.random.Generator:
    """Independent generator for one trial, derived from the call entropy."""
    return np.random.default_rng([int(entropy), int(trial_index)])


class RandomPathSimulator:
    """
    Simulate terminal returns for the assets of a factor model.

    Parameters
    ----------
    factor_model : RiskFactorModel
        Annualized drift, volatility and correlation per asset.
    weights : np.ndarray
        Market-value fractions per asset (N,).
    time_steps : int
        Number of discrete steps per trial.
    dt : float
        Step size in years (one trading day by default).
    include_jump_risk : bool
        Add the compound-Poisson jump term.
    """

    def __init__(
        self,
        factor_model: RiskFactorModel,
        weights: np.ndarray,
        time_steps: int,
        dt: float = 1.0 / TRADING_DAYS_PER_YEAR,
        include_jump_risk: bool = False,
        jump_intensity: float = DEFAULT_JUMP_INTENSITY,
        jump_mean: float = DEFAULT_JUMP_MEAN,
        jump_std: float = DEFAULT_JUMP_STD,
    ):
        weights = np.asarray(weights, dtype=float)
        n = len(factor_model.asset_ids)
        if weights.shape != (n,):
            raise InputValidationError("weights", f"expected {n} weights, got {weights.shape}")
        if time_steps < 1:
            raise InputValidationError("time_steps", "time_steps must be at least 1")
        if dt <= 0:
            raise InputValidationError("dt", "dt must be positive")

        self.factor_model = factor_model
        self.weights = weights
        self.time_steps = int(time_steps)
        self.dt = float(dt)
        self.include_jump_risk = include_jump_risk
        self.jump_probability = min(jump_intensity * dt, 1.0)
        self.jump_mean = jump_mean
        self.jump_std = jump_std

        # Factored once; every trial reuses it.
        self.cholesky_factor, self.regularized = cholesky_with_regularization(
            factor_model.correlation_matrix
        )

        sigma = factor_model.volatilities
        self._drift = (factor_model.expected_returns - 0.5 * sigma ** 2) * self.dt
        self._diffusion = sigma * np.sqrt(self.dt)

    @property
    def n_assets(self) -> int:
        return len(self.factor_model.asset_ids)

    def simulate_asset_returns(self, rng: np.random.Generator) -> np.ndarray:
        """
        One trial: terminal simple return per asset (N,), prices
        normalized to 1 at the start.
        """
        shape = (self.time_steps, self.n_assets)
        eps = box_muller(rng, shape)
        z = eps @ self.cholesky_factor.T

        log_increments = self._drift + self._diffusion * z
        if self.include_jump_risk:
            fired = rng.random(shape) < self.jump_probability
            sizes = self.jump_mean + self.jump_std * box_muller(rng, shape)
            log_increments = log_increments + np.where(fired, sizes, 0.0)

        return np.expm1(log_increments.sum(axis=0))

    def simulate_trial(self, rng: np.random.Generator) -> float:
        """One trial: portfolio return weighted by starting market value."""
        return float(self.weights @ self.simulate_asset_returns(rng))

    def simulate_trials(self, trial_indices: Sequence[int], entropy: int) -> np.ndarray:
        """
        Asset returns for the given trial indices, (len(trial_indices) x N).
        """
        out = np.empty((len(trial_indices), self.n_assets))
        for row, k in enumerate(trial_indices):
            out[row] = self.simulate_asset_returns(trial_generator(entropy, k))
        return out


def resolve_entropy(seed: Optional[int]) -> int:
    """The call-level entropy: the seed itself, or fresh OS entropy."""
    if seed is not None:
        return int(seed)
    return int(np.random.SeedSequence().entropy)
