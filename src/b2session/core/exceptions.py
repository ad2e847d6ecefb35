"""Exception hierarchy for b2session.

Every failure the client surfaces is one of the classes below. The
Resilience Policy decides what to do with a failure purely from its class:

- ``TransientError``: retried with backoff, counted by the circuit breaker
- ``AuthInvalidError``: authorization invalidated, operation retried once
- ``CapabilityInvalidError``: upload capability evicted, retried once
- ``PermanentError``: surfaced immediately
- ``CircuitOpenError``: surfaced immediately, no network call was made
- ``ProtocolViolationError``: surfaced immediately, the service answered
  with something the client cannot interpret
"""


class B2SessionError(Exception):
    """Base exception for b2session.

    Attributes:
        message: Human readable description
        status: HTTP status code of the failed response, if any
        code: Service error code from the JSON error body, if any
        operation: Name of the protocol operation that failed, if known
        handled: Set once a Resilience Policy has given up on the error, so an
            enclosing policy call surfaces it without retrying it again
    """

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        code: str | None = None,
        operation: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.status = status
        self.code = code
        self.operation = operation
        self.handled = False

    def __str__(self) -> str:
        details = []
        if self.operation:
            details.append(self.operation)
        if self.status is not None:
            details.append(str(self.status))
        if self.code:
            details.append(self.code)
        if not details:
            return self.message
        return f"{self.message} ({', '.join(details)})"


class TransientError(B2SessionError):
    """Exception raised for failures expected to clear up on retry.

    Timeouts, connection failures, 408, 429 and 5xx responses.
    """

    def __init__(self, message: str, *, retry_after: float | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class AuthInvalidError(B2SessionError):
    """Exception raised when the account authorization token was rejected."""
    pass


class CapabilityInvalidError(B2SessionError):
    """Exception raised when an upload URL or its token was rejected."""
    pass


class PermanentError(B2SessionError):
    """Exception raised for failures that retrying cannot fix."""
    pass


class CredentialsError(PermanentError):
    """Exception raised when the application key is missing or rejected."""
    pass


class MissingCapabilityError(PermanentError):
    """Exception raised when the authorization lacks a required capability."""

    def __init__(self, capability: str, **kwargs):
        super().__init__(f"Authorization is missing the {capability} capability", **kwargs)
        self.capability = capability


class MissingBucketIdError(PermanentError):
    """Exception raised when no bucket was given and none is implied by the key."""

    def __init__(self, **kwargs):
        super().__init__(
            "No bucket id given and the application key is not restricted to a bucket",
            **kwargs,
        )


class SessionStateError(PermanentError):
    """Exception raised for an operation the large-file session state forbids."""
    pass


class CircuitOpenError(B2SessionError):
    """Exception raised when a circuit breaker rejects a call without trying it.

    Attributes:
        endpoint_class: Endpoint class whose breaker is open
        retry_in: Seconds until the breaker admits a probe call
    """

    def __init__(self, endpoint_class: str, retry_in: float, **kwargs):
        super().__init__(
            f"Circuit for {endpoint_class} endpoints is open, retry in {retry_in:.1f}s",
            **kwargs,
        )
        self.endpoint_class = endpoint_class
        self.retry_in = retry_in


class ProtocolViolationError(B2SessionError):
    """Exception raised when a response does not match the expected shape."""
    pass


class PartMismatchError(ProtocolViolationError):
    """Exception raised when server-side parts disagree with the local record."""
    pass
