"""
Error taxonomy and operation results.

Components raise CoreError subclasses internally; public operations are
wrapped with `returns_result` so callers always receive a Result with a
discriminated error kind. Store failures (PyMongoError) are not caught here.
"""

import functools
import logging
from typing import Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class CoreError(Exception):
    kind = "error"

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.field = field


class ValidationError(CoreError):
    kind = "validation"


class GatewayError(CoreError):
    kind = "gateway"


class ConflictError(CoreError):
    kind = "conflict"


class NoEligibleFundsError(CoreError):
    kind = "no_eligible_funds"


class NotFoundError(CoreError):
    kind = "not_found"


class InvalidTransitionError(CoreError):
    kind = "invalid_transition"


class ErrorDetail(BaseModel):
    kind: str
    message: str
    field: Optional[str] = None


class Result(BaseModel):
    success: bool = True
    error: Optional[ErrorDetail] = None

    @classmethod
    def failure(cls, exc: CoreError):
        return cls(success=False, error=ErrorDetail(kind=exc.kind, message=exc.message, field=exc.field))


def returns_result(result_cls=Result):
    """Convert CoreError raised by the wrapped operation into a failed `result_cls`."""
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except CoreError as exc:
                logger.info("%s failed (%s): %s", func.__name__, exc.kind, exc.message)
                return result_cls.failure(exc)
        return wrapper
    return decorator
