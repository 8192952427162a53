"""
Linear Algebra Kernel
=====================
Cholesky factorization and symmetric eigen-decomposition used to correlate
simulated shocks and to extract principal components.

Mathematical Foundation:
    Cholesky:        M = L Lᵀ
        L_ii = sqrt(M_ii - Σ_{k<i} L_ik²)
        L_ij = (M_ij - Σ_{k<j} L_ik L_jk) / L_jj
    Power iteration: v ← M v / ||M v||,   λ = vᵀ M v
    Deflation:       v ← v - Σ_k (vᵀ u_k) u_k  for previously found u_k
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np
import structlog

from portfolio_risk.config import (
    DEFAULT_SEED,
    EIGENVALUE_FLOOR,
    POWER_ITERATION_MAX_ITER,
    POWER_ITERATION_TOLERANCE,
    RIDGE_ALPHA,
    SYMMETRY_TOLERANCE,
)
from portfolio_risk.exceptions import (
    InputValidationError,
    NonPositiveDefiniteMatrixError,
)

logger = structlog.get_logger(__name__)


# ─────────────────────────────────────────────────────────────
# Validation
# ─────────────────────────────────────────────────────────────

def as_symmetric_matrix(matrix, field: str = "matrix") -> np.ndarray:
    """
    Convert ``matrix`` to a float array and check it is square, finite
    and symmetric.

    Raises
    ------
    InputValidationError
        If any of the checks fail.
    """
    arr = np.array(matrix, dtype=float)
    if arr.ndim != 2 or arr.shape[0] != arr.shape[1]:
        raise InputValidationError(field, f"expected a square matrix, got shape {arr.shape}")
    if arr.shape[0] == 0:
        raise InputValidationError(field, "matrix is empty")
    if not np.all(np.isfinite(arr)):
        raise InputValidationError(field, "matrix contains non-finite entries")
    if not np.allclose(arr, arr.T, atol=SYMMETRY_TOLERANCE):
        raise InputValidationError(field, "matrix is not symmetric")
    return arr


def is_positive_semidefinite(matrix: np.ndarray, tolerance: float = 1e-10) -> bool:
    """
    Check if a symmetric matrix is positive semi-definite.

    Parameters
    ----------
    matrix : np.ndarray
        Symmetric matrix to validate.
    tolerance : float
        Smallest eigenvalue still accepted as non-negative.

    Returns
    -------
    bool
        True if all eigenvalues are >= -tolerance.
    """
    eigenvalues = np.linalg.eigvalsh(matrix)
    return bool(np.all(eigenvalues >= -tolerance))


# ─────────────────────────────────────────────────────────────
# Cholesky
# ─────────────────────────────────────────────────────────────

def cholesky(matrix) -> np.ndarray:
    """
    Row-by-row Cholesky factorization.

    Parameters
    ----------
    matrix : array-like
        Symmetric matrix (N x N).

    Returns
    -------
    np.ndarray
        Lower triangular factor L with L Lᵀ = matrix.

    Raises
    ------
    NonPositiveDefiniteMatrixError
        When a diagonal radicand is negative or a pivot is zero.
    """
    a = as_symmetric_matrix(matrix)
    n = a.shape[0]
    L = np.zeros((n, n))

    for i in range(n):
        for j in range(i + 1):
            s = float(L[i, :j] @ L[j, :j])
            if i == j:
                radicand = a[i, i] - s
                if not radicand > 0.0:
                    raise NonPositiveDefiniteMatrixError(i, radicand)
                L[i, i] = np.sqrt(radicand)
            else:
                L[i, j] = (a[i, j] - s) / L[j, j]

    return L


def regularize_correlation(
    matrix,
    alpha: float = RIDGE_ALPHA,
    floor: float = EIGENVALUE_FLOOR,
) -> np.ndarray:
    """
    Repair a correlation matrix that failed factorization.

    Algorithm:
        1. Clip eigenvalues below ``floor`` and rebuild Q Λ Qᵀ
        2. Rescale to a unit diagonal
        3. Ridge blend:  M' = (1 - α) M + α I

    Parameters
    ----------
    matrix : array-like
        Symmetric correlation matrix.
    alpha : float
        Ridge weight on the identity.
    floor : float
        Minimum eigenvalue kept after clipping.

    Returns
    -------
    np.ndarray
        Positive definite correlation matrix with unit diagonal.
    """
    a = as_symmetric_matrix(matrix, field="correlation_matrix")
    eigenvalues, eigenvectors = np.linalg.eigh(a)
    clipped = (eigenvectors * np.maximum(eigenvalues, floor)) @ eigenvectors.T

    d = np.sqrt(np.diag(clipped))
    d[d < floor] = floor
    clipped = clipped / np.outer(d, d)
    clipped = (clipped + clipped.T) / 2.0
    np.fill_diagonal(clipped, 1.0)

    n = clipped.shape[0]
    return (1.0 - alpha) * clipped + alpha * np.eye(n)


def cholesky_with_regularization(
    correlation_matrix,
    alpha: float = RIDGE_ALPHA,
) -> Tuple[np.ndarray, bool]:
    """
    Factor a correlation matrix, repairing it once if needed.

    Returns
    -------
    tuple
        (L, regularized) where ``regularized`` tells whether the repair ran.

    Raises
    ------
    InputValidationError
        If the matrix still fails after one repair.
    """
    try:
        return cholesky(correlation_matrix), False
    except NonPositiveDefiniteMatrixError as exc:
        logger.warning(
            "correlation_matrix_regularized",
            row=exc.row,
            radicand=exc.radicand,
            alpha=alpha,
        )
        repaired = regularize_correlation(correlation_matrix, alpha=alpha)

    try:
        return cholesky(repaired), True
    except NonPositiveDefiniteMatrixError as exc:
        raise InputValidationError(
            "correlation_matrix",
            f"not positive definite after regularization (row {exc.row})",
        ) from exc


def regularized_correlation(correlation_matrix, alpha: float = RIDGE_ALPHA) -> np.ndarray:
    """Return the matrix actually factored: L Lᵀ after the policy above."""
    L, _ = cholesky_with_regularization(correlation_matrix, alpha)
    out = L @ L.T
    np.fill_diagonal(out, 1.0)
    return out


# ─────────────────────────────────────────────────────────────
# Eigen-decomposition
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class EigenDecomposition:
    eigenvalues: np.ndarray
    eigenvectors: np.ndarray  # columns are eigenvectors
    converged: Tuple[bool, ...]


def _orthogonalize(vector: np.ndarray, basis: Sequence[np.ndarray]) -> np.ndarray:
    for u in basis:
        vector = vector - (vector @ u) * u
    return vector


def power_iteration(
    matrix: np.ndarray,
    previous: Sequence[np.ndarray] = (),
    rng: Optional[np.random.Generator] = None,
    tolerance: float = POWER_ITERATION_TOLERANCE,
    max_iter: int = POWER_ITERATION_MAX_ITER,
) -> Tuple[float, np.ndarray, bool]:
    """
    Dominant eigenpair of ``matrix`` restricted to the complement of
    ``previous``.

    Returns
    -------
    tuple
        (eigenvalue, unit eigenvector, converged). Hitting ``max_iter``
        returns the last iterate with ``converged=False``.
    """
    if rng is None:
        rng = np.random.default_rng(DEFAULT_SEED)
    n = matrix.shape[0]

    vector = _orthogonalize(rng.random(n) - 0.5, previous)
    norm = np.linalg.norm(vector)
    if norm == 0.0:
        vector = _orthogonalize(np.ones(n), previous)
        norm = np.linalg.norm(vector)
    vector = vector / norm

    for _ in range(max_iter):
        product = _orthogonalize(matrix @ vector, previous)
        new_norm = np.linalg.norm(product)
        if new_norm == 0.0:
            # Remaining subspace is annihilated: eigenvalue 0.
            return 0.0, vector, True
        new_vector = product / new_norm

        # Sign-insensitive so negative eigenvalues can converge too.
        change = min(
            np.abs(new_vector - vector).sum(),
            np.abs(new_vector + vector).sum(),
        )
        vector = new_vector
        if change < tolerance:
            return float(vector @ matrix @ vector), vector, True

    return float(vector @ matrix @ vector), vector, False


def symmetric_eigen_decomposition(
    matrix,
    k: int,
    rng: Optional[np.random.Generator] = None,
    tolerance: float = POWER_ITERATION_TOLERANCE,
    max_iter: int = POWER_ITERATION_MAX_ITER,
) -> EigenDecomposition:
    """
    Top-``k`` eigenpairs by power iteration with deflation.

    Parameters
    ----------
    matrix : array-like
        Symmetric matrix (N x N).
    k : int
        Number of eigenpairs; capped at N.
    rng : np.random.Generator, optional
        Source of the random start vectors.

    Returns
    -------
    EigenDecomposition
        Eigenvalues sorted by descending magnitude, matching eigenvector
        columns, and a per-pair convergence flag.
    """
    a = as_symmetric_matrix(matrix)
    if rng is None:
        rng = np.random.default_rng(DEFAULT_SEED)
    k = max(0, min(int(k), a.shape[0]))

    values: List[float] = []
    vectors: List[np.ndarray] = []
    flags: List[bool] = []
    for _ in range(k):
        value, vector, converged = power_iteration(a, vectors, rng, tolerance, max_iter)
        values.append(value)
        vectors.append(vector)
        flags.append(converged)
        if not converged:
            logger.debug("power_iteration_not_converged", component=len(values), max_iter=max_iter)

    order = sorted(range(k), key=lambda i: -abs(values[i]))
    eigenvalues = np.array([values[i] for i in order])
    eigenvectors = (
        np.column_stack([vectors[i] for i in order]) if k else np.zeros((a.shape[0], 0))
    )
    return EigenDecomposition(
        eigenvalues=eigenvalues,
        eigenvectors=eigenvectors,
        converged=tuple(flags[i] for i in order),
    )
