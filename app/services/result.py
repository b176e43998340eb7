"""Outcome of a checkout or charge request started from chat or the payment API."""

from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class FailureCode(str, Enum):
    INVALID_PLAN = "invalid_plan"
    ORG_UNAVAILABLE = "org_unavailable"
    NOT_CONFIGURED = "not_configured"
    PROVIDER_ERROR = "provider_error"

    @property
    def http_status(self) -> int:
        return HTTP_STATUS[self]


HTTP_STATUS = {
    FailureCode.INVALID_PLAN: 400,
    FailureCode.ORG_UNAVAILABLE: 503,
    FailureCode.NOT_CONFIGURED: 503,
    FailureCode.PROVIDER_ERROR: 502,
}


@dataclass(frozen=True)
class Result(Generic[T]):
    """Either the created checkout/charge, or a chat-ready Thai error message."""

    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[FailureCode] = None

    @staticmethod
    def success(value: T) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def failure(error: str, code: FailureCode) -> "Result[T]":
        return Result(ok=False, error=error, error_code=code)
