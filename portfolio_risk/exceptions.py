"""
Error Taxonomy
==============
Exceptions raised by the risk engines.

Every public engine call either returns a fully populated result or raises
one of these. Partial failures inside a result (a single position's
decomposition entry, say) are recorded on the result instead.
"""

from typing import Optional


class RiskEngineError(Exception):
    """Base class for all risk engine errors."""


class InputValidationError(RiskEngineError, ValueError):
    """
    Request or snapshot failed validation.

    Parameters
    ----------
    field : str
        Name of the offending field.
    message : str
        Human readable description.
    """

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


class EmptyPortfolioError(InputValidationError):
    def __init__(self, message: str = "portfolio has no positions") -> None:
        super().__init__("positions", message)


class UnsupportedMethodError(InputValidationError):
    def __init__(self, method: object) -> None:
        super().__init__("method", f"unsupported VaR method {method!r}")


class UnsupportedConfidenceLevelError(InputValidationError):
    def __init__(self, confidence_level: object) -> None:
        super().__init__(
            "confidence_level",
            f"unsupported confidence level {confidence_level!r}; "
            "expected one of 0.95, 0.99, 0.999",
        )


class NonPositiveDefiniteMatrixError(RiskEngineError, ArithmeticError):
    """Cholesky factorization hit a negative radicand or a zero pivot."""

    def __init__(self, row: int, radicand: float) -> None:
        self.row = row
        self.radicand = radicand
        super().__init__(
            f"matrix is not positive definite (row {row}, radicand {radicand:.3e})"
        )


class InsufficientDataError(RiskEngineError):
    """A calculation needs more observations than were supplied."""

    def __init__(self, required: int, actual: int, what: str = "observations") -> None:
        self.required = required
        self.actual = actual
        super().__init__(f"need at least {required} {what}, got {actual}")


class InsufficientTrialsError(InsufficientDataError):
    def __init__(self, required: int, actual: int) -> None:
        super().__init__(required, actual, what="Monte Carlo trials")


class NumericalInstabilityError(RiskEngineError, ArithmeticError):
    """A non-finite intermediate was produced (NaN or infinity)."""

    def __init__(self, quantity: str, detail: Optional[str] = None) -> None:
        self.quantity = quantity
        msg = f"non-finite value while computing {quantity}"
        if detail:
            msg = f"{msg}: {detail}"
        super().__init__(msg)
