"""Mapping of service error responses onto failure classes."""

import logging
from enum import Enum
from types import MappingProxyType
from typing import Mapping

from b2session.client.transport import TransportResponse
from b2session.core.exceptions import (
    AuthInvalidError,
    B2SessionError,
    CapabilityInvalidError,
    PermanentError,
    TransientError,
)

logger = logging.getLogger(__name__)


class FailureClass(str, Enum):
    """How the Resilience Policy treats a failed response."""

    TRANSIENT = "transient"
    AUTH_INVALID = "auth_invalid"
    CAPABILITY_INVALID = "capability_invalid"
    PERMANENT = "permanent"


# (status, service code) -> class; a None code matches any code for that status
FailureTable = Mapping[tuple[int, str | None], FailureClass]

API_FAILURES: FailureTable = MappingProxyType({
    (401, "expired_auth_token"): FailureClass.AUTH_INVALID,
    (401, "bad_auth_token"): FailureClass.AUTH_INVALID,
    (408, None): FailureClass.TRANSIENT,
    (429, None): FailureClass.TRANSIENT,
})

# Upload URLs carry their own token; rejecting it invalidates the URL, not the account
UPLOAD_FAILURES: FailureTable = MappingProxyType({
    (401, "expired_auth_token"): FailureClass.CAPABILITY_INVALID,
    (401, "bad_auth_token"): FailureClass.CAPABILITY_INVALID,
    (408, None): FailureClass.TRANSIENT,
    (429, None): FailureClass.TRANSIENT,
})

# A 401 from authorize means the application key itself is bad
AUTHORIZE_FAILURES: FailureTable = MappingProxyType({
    (408, None): FailureClass.TRANSIENT,
    (429, None): FailureClass.TRANSIENT,
})

_ERROR_TYPES: dict[FailureClass, type[B2SessionError]] = {
    FailureClass.TRANSIENT: TransientError,
    FailureClass.AUTH_INVALID: AuthInvalidError,
    FailureClass.CAPABILITY_INVALID: CapabilityInvalidError,
    FailureClass.PERMANENT: PermanentError,
}


def classify(table: FailureTable, status: int, code: str | None) -> FailureClass:
    """Classify a non-2xx response.

    Exact (status, code) entries win over status-only entries. Statuses not in
    the table are transient for 5xx and permanent otherwise.
    """
    if code is not None and (status, code) in table:
        return table[(status, code)]
    if (status, None) in table:
        return table[(status, None)]
    if status >= 500:
        return FailureClass.TRANSIENT
    return FailureClass.PERMANENT


def parse_retry_after(value: str | None) -> float | None:
    """Parse a Retry-After header given in seconds."""
    if value is None:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


def _error_body(response: TransportResponse) -> tuple[str | None, str]:
    try:
        body = response.json()
    except B2SessionError:
        body = None
    if isinstance(body, dict):
        code = body.get("code")
        message = body.get("message") or code or f"HTTP {response.status_code}"
        return (code if isinstance(code, str) else None), str(message)
    text = response.content.decode("utf-8", errors="replace").strip()
    return None, text or f"HTTP {response.status_code}"


def error_for_response(
    response: TransportResponse, table: FailureTable, operation: str
) -> B2SessionError:
    """Build the exception describing a failed response.

    Args:
        response: Non-2xx response
        table: Failure table of the operation that produced it
        operation: Operation name

    Returns:
        Exception instance of the class the table selects
    """
    code, message = _error_body(response)
    failure = classify(table, response.status_code, code)
    error_type = _ERROR_TYPES[failure]

    logger.debug(
        "Classified error response",
        extra={
            "operation": operation,
            "status_code": response.status_code,
            "code": code,
            "failure_class": failure.value,
        },
    )

    kwargs = {"status": response.status_code, "code": code, "operation": operation}
    if failure is FailureClass.TRANSIENT:
        return TransientError(
            message,
            retry_after=parse_retry_after(response.headers.get("retry-after")),
            **kwargs,
        )
    return error_type(message, **kwargs)


def raise_for_response(response: TransportResponse, table: FailureTable, operation: str) -> None:
    """Raise the classified exception unless the response is a 2xx."""
    if response.is_success:
        return
    raise error_for_response(response, table, operation)
