"""Retry, reauthorization and circuit breaking around protocol operations."""

import asyncio
import logging
import threading
import time
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_random_exponential,
)

from b2session.client.endpoints import EndpointClass, Operation
from b2session.core.config import Settings
from b2session.core.exceptions import (
    AuthInvalidError,
    B2SessionError,
    CapabilityInvalidError,
    CircuitOpenError,
    TransientError,
)
from b2session.models.authorization import Authorization
from b2session.session.auth_cache import AuthorizationCache

logger = logging.getLogger(__name__)

T = TypeVar("T")

Attempt = Callable[[Optional[Authorization]], Awaitable[T]]


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Consecutive-failure circuit breaker for one endpoint class.

    Closed: calls pass, transient failures are counted and any other outcome
    resets the count. Reaching ``failure_threshold`` opens the circuit.

    Open: calls fail fast with ``CircuitOpenError`` until the cooldown has
    elapsed, then the breaker goes half-open.

    Half-open: exactly one probe call is admitted. Success closes the circuit
    and restores the base cooldown; failure reopens it with the cooldown
    multiplied, up to ``max_cooldown``.
    """

    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = 5,
        cooldown: float = 30.0,
        cooldown_multiplier: float = 2.0,
        max_cooldown: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self.name = name
        self.failure_threshold = failure_threshold
        self.base_cooldown = cooldown
        self.cooldown_multiplier = cooldown_multiplier
        self.max_cooldown = max_cooldown
        self._clock = clock

        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._cooldown = cooldown
        self._opened_at: Optional[float] = None
        self._probe_in_flight = False

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def cooldown(self) -> float:
        return self._cooldown

    def _remaining_cooldown(self) -> float:
        if self._opened_at is None:
            return 0.0
        return max(0.0, self._opened_at + self._cooldown - self._clock())

    def before_call(self) -> None:
        """Admit a call or reject it.

        Raises:
            CircuitOpenError: If the circuit is open, or half-open with the
                probe already in flight
        """
        with self._lock:
            if self._state is CircuitState.OPEN:
                remaining = self._remaining_cooldown()
                if remaining > 0:
                    raise CircuitOpenError(self.name, remaining)
                self._state = CircuitState.HALF_OPEN
                self._probe_in_flight = False
                logger.info("Circuit half-open", extra={"endpoint_class": self.name})

            if self._state is CircuitState.HALF_OPEN:
                if self._probe_in_flight:
                    raise CircuitOpenError(self.name, 0.0)
                self._probe_in_flight = True

    def allows_retry(self) -> bool:
        """Whether another attempt may follow a failure right now."""
        return self._state is CircuitState.CLOSED

    def record_success(self) -> None:
        """Record an outcome that proves the endpoint is answering."""
        with self._lock:
            if self._state is not CircuitState.CLOSED:
                logger.info("Circuit closed", extra={"endpoint_class": self.name})
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._cooldown = self.base_cooldown
            self._opened_at = None
            self._probe_in_flight = False

    def record_failure(self) -> None:
        """Record a transient failure."""
        with self._lock:
            if self._state is CircuitState.HALF_OPEN:
                self._cooldown = min(self._cooldown * self.cooldown_multiplier, self.max_cooldown)
                self._open()
                return
            self._failure_count += 1
            if self._state is CircuitState.CLOSED and self._failure_count >= self.failure_threshold:
                self._open()

    def release_probe(self) -> None:
        """Free the half-open probe slot without a verdict on the endpoint."""
        with self._lock:
            if self._state is CircuitState.HALF_OPEN:
                self._probe_in_flight = False

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._probe_in_flight = False
        logger.warning(
            "Circuit opened",
            extra={
                "endpoint_class": self.name,
                "failure_count": self._failure_count,
                "cooldown": self._cooldown,
            },
        )


class ResiliencePolicy:
    """Wraps protocol operations with the failure handling each class needs.

    - Transient: retried with exponential backoff and full jitter, up to
      ``max_attempts`` attempts, and counted by the endpoint class breaker
    - AuthInvalid: the authorization is invalidated and the operation is
      retried once with a fresh one
    - CapabilityInvalid: the operation is retried once; the attempt callable
      is responsible for having evicted its upload URL
    - anything else: surfaced unchanged

    When limits run out the last underlying error is raised, not a wrapper.
    """

    def __init__(
        self,
        auth_cache: Optional[AuthorizationCache],
        *,
        max_attempts: int = 5,
        initial_backoff: float = 1.0,
        max_backoff: float = 64.0,
        failure_threshold: int = 5,
        cooldown: float = 30.0,
        cooldown_multiplier: float = 2.0,
        max_cooldown: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize the policy.

        Args:
            auth_cache: Cache supplying authorizations; may be None only if every
                executed operation is unauthenticated
            max_attempts: Total attempts for transient failures
            initial_backoff: Backoff multiplier in seconds
            max_backoff: Ceiling on a single backoff wait
            failure_threshold: Consecutive transient failures that open a breaker
            cooldown: Initial open duration of a breaker
            cooldown_multiplier: Factor applied after a failed probe
            max_cooldown: Ceiling on the breaker cooldown
            clock: Monotonic clock for breakers
            sleep: Coroutine used to wait between attempts
        """
        self._auth_cache = auth_cache
        self._max_attempts = max(1, max_attempts)
        self._backoff = wait_random_exponential(multiplier=initial_backoff, max=max_backoff)
        self._sleep = sleep
        self._breaker_options = {
            "failure_threshold": failure_threshold,
            "cooldown": cooldown,
            "cooldown_multiplier": cooldown_multiplier,
            "max_cooldown": max_cooldown,
            "clock": clock,
        }
        self._breakers: dict[EndpointClass, CircuitBreaker] = {}

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        auth_cache: Optional[AuthorizationCache],
        **kwargs,
    ) -> "ResiliencePolicy":
        """Build a policy from client settings."""
        return cls(
            auth_cache,
            max_attempts=settings.RETRY_MAX_ATTEMPTS,
            initial_backoff=settings.RETRY_INITIAL_BACKOFF_SECONDS,
            max_backoff=settings.RETRY_MAX_BACKOFF_SECONDS,
            failure_threshold=settings.BREAKER_FAILURE_THRESHOLD,
            cooldown=settings.BREAKER_COOLDOWN_SECONDS,
            cooldown_multiplier=settings.BREAKER_COOLDOWN_MULTIPLIER,
            max_cooldown=settings.BREAKER_MAX_COOLDOWN_SECONDS,
            **kwargs,
        )

    def bind(self, auth_cache: AuthorizationCache) -> None:
        """Attach the authorization cache after construction."""
        self._auth_cache = auth_cache

    def breaker(self, endpoint_class: EndpointClass) -> CircuitBreaker:
        """Return the breaker for ``endpoint_class``, creating it on first use."""
        breaker = self._breakers.get(endpoint_class)
        if breaker is None:
            breaker = CircuitBreaker(endpoint_class.value, **self._breaker_options)
            self._breakers[endpoint_class] = breaker
        return breaker

    def _wait(self, retry_state: RetryCallState) -> float:
        wait = self._backoff(retry_state)
        error = retry_state.outcome.exception() if retry_state.outcome else None
        retry_after = getattr(error, "retry_after", None)
        if retry_after is not None:
            wait = max(wait, retry_after)
        return wait

    async def execute(self, operation: Operation, attempt: Attempt[T]) -> T:
        """Run ``attempt`` under the policy.

        Calls made under the policy from inside ``attempt`` (fetching an
        upload URL, refreshing the authorization) run their own retries
        against their own breaker. Their final errors pass through this
        call unchanged: they are not retried again and not charged to
        this operation's breaker.

        Args:
            operation: Descriptor of the operation being performed
            attempt: Coroutine function performing one attempt. It receives the
                current authorization, or None for unauthenticated operations.

        Returns:
            Whatever a successful attempt returned

        Raises:
            CircuitOpenError: If the breaker rejected the first attempt
            B2SessionError: The last underlying failure otherwise
        """
        breaker = self.breaker(operation.endpoint_class)
        recovered = {"auth": False, "capability": False}

        def should_retry(error: BaseException) -> bool:
            return (
                isinstance(error, TransientError)
                and not error.handled
                and breaker.allows_retry()
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=self._wait,
            retry=retry_if_exception(should_retry),
            sleep=self._sleep,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

        try:
            async for retry_attempt in retrying:
                with retry_attempt:
                    return await self._attempt_once(operation, breaker, attempt, recovered)
        except B2SessionError as e:
            e.handled = True
            raise

    async def _attempt_once(
        self,
        operation: Operation,
        breaker: CircuitBreaker,
        attempt: Attempt[T],
        recovered: dict[str, bool],
    ) -> T:
        while True:
            breaker.before_call()
            auth = None
            try:
                if operation.authenticated:
                    if self._auth_cache is None:
                        raise RuntimeError("No authorization cache bound to the policy")
                    auth = await self._auth_cache.get_valid()
                result = await attempt(auth)
            except B2SessionError as e:
                if e.handled:
                    # Came out of a nested policy call; this endpoint was not the one failing
                    breaker.release_probe()
                    raise
                if isinstance(e, TransientError):
                    breaker.record_failure()
                    raise
                if isinstance(e, AuthInvalidError):
                    breaker.record_success()
                    if recovered["auth"] or auth is None:
                        raise
                    recovered["auth"] = True
                    logger.info(
                        "Authorization rejected, refreshing and retrying once",
                        extra={"operation": operation.name},
                    )
                    self._auth_cache.invalidate(auth)
                    continue
                if isinstance(e, CapabilityInvalidError):
                    breaker.record_success()
                    if recovered["capability"]:
                        raise
                    recovered["capability"] = True
                    logger.info(
                        "Upload URL rejected, retrying once with a new one",
                        extra={"operation": operation.name},
                    )
                    continue
                if isinstance(e, CircuitOpenError):
                    breaker.release_probe()
                    raise
                # The endpoint answered, just not with what we wanted
                breaker.record_success()
                raise
            except BaseException:
                breaker.release_probe()
                raise
            breaker.record_success()
            return result
