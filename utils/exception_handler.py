"""
Exception Handler Module
Error taxonomy shared by the payment, allocation, bridge and resilience layers.

Every error carries an HTTP status and a retryable flag so routes can map it
to a response without knowing which layer raised it.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import HTTPException

logger = logging.getLogger(__name__)


class PaymentSystemError(Exception):
    """Base class for all domain errors"""

    code = "payment_system_error"
    http_status = 500
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(PaymentSystemError):
    """Custom validation error for input validation failures"""

    code = "validation_error"
    http_status = 400


class UnsupportedTokenError(ValidationError):
    code = "unsupported_token"

    def __init__(self, token: str, chain: str):
        self.token = token
        self.chain = chain
        super().__init__(
            f"Token {token} is not supported on chain {chain}",
            {"token": token, "chain": chain},
        )


class UnsupportedChainError(ValidationError):
    code = "unsupported_chain"

    def __init__(self, chain: str):
        self.chain = chain
        super().__init__(f"Chain {chain} is not supported", {"chain": chain})


class AuthorizationError(PaymentSystemError):
    """Caller is not allowed to perform the operation"""

    code = "not_authorized"
    http_status = 403


class NotFoundError(PaymentSystemError):
    code = "not_found"
    http_status = 404


class InvalidStateError(PaymentSystemError):
    """Illegal state transition attempt"""

    code = "invalid_state"
    http_status = 409

    def __init__(self, message: str, current_status: Optional[str] = None, **details):
        self.current_status = current_status
        if current_status is not None:
            details["current_status"] = current_status
        super().__init__(message, details)


class InvalidStatus(InvalidStateError):
    """Bridge transaction is not in the status the operation requires"""

    code = "invalid_status"


class ExpiredError(PaymentSystemError):
    code = "expired"
    http_status = 410


class RebalanceCooldownActive(PaymentSystemError):
    code = "rebalance_cooldown_active"
    http_status = 429

    def __init__(self, retry_after_seconds: int):
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            f"Rebalance cooldown active, retry in {retry_after_seconds}s",
            {"retry_after_seconds": retry_after_seconds},
        )


class ExternalServiceError(PaymentSystemError):
    """Network or protocol failure after the retry budget was exhausted"""

    code = "external_service_error"
    http_status = 502
    retryable = True

    def __init__(self, service: str, message: str, attempts: int = 1):
        self.service = service
        self.attempts = attempts
        super().__init__(
            f"{service}: {message}", {"service": service, "attempts": attempts}
        )


class ServiceUnavailable(PaymentSystemError):
    """Circuit breaker for the service is open"""

    code = "service_unavailable"
    http_status = 503
    retryable = True

    def __init__(self, service: str, retry_after_seconds: int = 0):
        self.service = service
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            f"{service} is temporarily unavailable, try again later",
            {"service": service, "retry_after_seconds": retry_after_seconds},
        )


class ReconciliationRequired(PaymentSystemError):
    """
    Outcome of a funds-moving call and the local record disagree.

    Never retried automatically: an operator resolves the case.
    """

    code = "reconciliation_required"
    http_status = 500

    def __init__(self, message: str, case_id: Optional[str] = None, **details):
        self.case_id = case_id
        details["case_id"] = case_id
        super().__init__(message, details)


def is_domain_error(error: BaseException) -> bool:
    """Domain errors are answers from a service, not failures of it"""
    return isinstance(error, PaymentSystemError) and not isinstance(
        error, (ExternalServiceError, ServiceUnavailable)
    )


def to_http_exception(error: PaymentSystemError) -> HTTPException:
    """Map a domain error to the HTTP response routes return for it"""
    headers = None
    retry_after = getattr(error, "retry_after_seconds", None)
    if retry_after:
        headers = {"Retry-After": str(retry_after)}
    if error.http_status >= 500:
        logger.error(f"{error.code}: {error.message}")
    return HTTPException(status_code=error.http_status, detail=error.to_dict(), headers=headers)
