"""
Typed failures raised by the prediction engine.

Every error carries a stable ``code`` discriminant so that callers can
decide per query whether to abort or report, without parsing messages.
"""

import warnings


class CoxPredictError(Exception):
    """Base class for all errors raised by cox_predict."""

    code = 'cox_predict_error'

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class InvalidArgumentError(CoxPredictError, ValueError):
    """Missing or malformed argument, or an unsupported option combination."""

    code = 'invalid_argument'


class UnsupportedModelFeatureError(CoxPredictError, ValueError):
    """The fitted model uses a feature the estimators cannot handle."""

    code = 'unsupported_model_feature'


class NumericDegeneracyError(CoxPredictError, ArithmeticError):
    """A degenerate configuration (e.g. zero risk set) in strict mode."""

    code = 'numeric_degeneracy'


class NumericDegeneracyWarning(UserWarning):
    """Same condition as NumericDegeneracyError when not running strict."""

    code = 'numeric_degeneracy'


def report_degeneracy(message: str, strict: bool = False) -> None:
    """Raise NumericDegeneracyError when strict, otherwise warn."""
    if strict:
        raise NumericDegeneracyError(message)
    warnings.warn(message, NumericDegeneracyWarning, stacklevel=3)
