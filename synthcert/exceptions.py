"""Errors raised by the certification pipeline."""

from typing import Optional


class SynthCertError(Exception):
    """Base class for all synthcert errors."""


class InsufficientDataError(SynthCertError, ValueError):
    """A column has too few observed values to estimate a marginal or a correlation."""

    def __init__(self, message: str, column: Optional[str] = None):
        super().__init__(message)
        self.column = column


class DegenerateCorrelationError(SynthCertError, ValueError):
    """The correlation matrix stays non positive-definite after eigenvalue flooring."""


class SchemaMismatchError(SynthCertError, ValueError):
    """Two tables (or a table and a column list) do not line up."""


class BudgetExhaustedError(SynthCertError, RuntimeError):
    """A consume call was refused because it would overrun the privacy budget.

    Recoverable: ask for a smaller epsilon or wait for an audited reset.
    """

    def __init__(self, dataset_id: str, requested: float, remaining: float):
        self.dataset_id = dataset_id
        self.requested = float(requested)
        self.remaining = float(remaining)
        super().__init__(
            f"Privacy budget exhausted for dataset '{dataset_id}': "
            f"requested epsilon={self.requested:.6g}, remaining={self.remaining:.6g}"
        )
