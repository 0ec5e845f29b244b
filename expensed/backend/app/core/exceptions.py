# backend/app/core/exceptions.py
"""
Billing error taxonomy.

Services raise these; ``app.main`` turns them into JSON responses. The
``detail`` payload keeps the ``upgrade_url`` shape the API has always used for
quota errors so clients can render an upgrade prompt.
"""
from http import HTTPStatus
from typing import Any, Dict, Optional

from app.core.config import settings


class BillingError(Exception):
    """Base exception for every billing failure surfaced to a caller."""

    status_code: int = HTTPStatus.BAD_REQUEST

    def __init__(
        self,
        message: str,
        upgrade_to: Optional[str] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.upgrade_to = upgrade_to
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "error": self.code,
            "message": self.message,
        }
        if self.details:
            body["details"] = self.details
        if self.upgrade_to:
            body["upgrade_to"] = self.upgrade_to
            body["upgrade_url"] = settings.UPGRADE_URL
        return body

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class ValidationError(BillingError):
    """Malformed input: bad coupon code, discount outside 0..100, missing reason."""

    status_code = HTTPStatus.BAD_REQUEST


class NotFoundError(BillingError):
    """Unknown plan, organization, invoice, coupon or subscription."""

    status_code = HTTPStatus.NOT_FOUND


class PermissionDenied(BillingError):
    """Rejected by the authorization gate or an organization role check."""

    status_code = HTTPStatus.FORBIDDEN


class ConflictError(BillingError):
    """Coupon exhausted/expired, redemption race lost, illegal transition, usage cap hit."""

    status_code = HTTPStatus.CONFLICT


class StateError(BillingError):
    """Operation not valid for the subscription's current state."""

    status_code = HTTPStatus.CONFLICT


class ExternalServiceError(BillingError):
    """
    Payment processor failure.

    ``retryable`` separates transport problems and 5xx responses from terminal
    declines; only the former may be retried, and only for reads.
    """

    status_code = HTTPStatus.BAD_GATEWAY

    def __init__(
        self,
        message: str,
        retryable: bool = False,
        service: str = "payment_processor",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details=details)
        self.retryable = retryable
        self.service = service

    def to_dict(self) -> Dict[str, Any]:
        # Processor internals stay in the logs
        return {
            "error": self.code,
            "message": "Payment service unavailable, please try again later",
            "retryable": self.retryable,
        }
