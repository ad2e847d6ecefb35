"""Tests for the circuit breaker and resilience policy."""

from unittest.mock import AsyncMock, Mock

import pytest

from b2session.client import endpoints
from b2session.core.exceptions import (
    AuthInvalidError,
    CapabilityInvalidError,
    CircuitOpenError,
    PermanentError,
    ProtocolViolationError,
    TransientError,
)
from b2session.session.resilience import CircuitBreaker, CircuitState, ResiliencePolicy


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def auth_cache():
    """Authorization cache double handing out a sentinel authorization."""
    cache = Mock()
    cache.get_valid = AsyncMock(return_value="auth-1")
    return cache


def _raise(error: Exception):
    raise error


def make_policy(auth_cache, clock, sleeps=None, **kwargs) -> ResiliencePolicy:
    options = {
        "max_attempts": 3,
        "initial_backoff": 0,
        "max_backoff": 0,
        "failure_threshold": 3,
        "cooldown": 10.0,
        "clock": clock,
    }
    options.update(kwargs)
    if sleeps is not None:
        options["sleep"] = sleeps
    return ResiliencePolicy(auth_cache, **options)


class TestCircuitBreaker:
    """Tests for CircuitBreaker state transitions."""

    def test_opens_after_threshold(self, clock):
        """Test consecutive transient failures open the circuit."""
        breaker = CircuitBreaker("api", failure_threshold=3, cooldown=10, clock=clock)

        for _ in range(3):
            breaker.before_call()
            breaker.record_failure()

        assert breaker.state is CircuitState.OPEN
        with pytest.raises(CircuitOpenError) as exc_info:
            breaker.before_call()
        assert exc_info.value.endpoint_class == "api"
        assert exc_info.value.retry_in == pytest.approx(10)

    def test_success_resets_count(self, clock):
        """Test failures must be consecutive."""
        breaker = CircuitBreaker("api", failure_threshold=3, clock=clock)

        breaker.record_failure()
        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()

        assert breaker.state is CircuitState.CLOSED
        assert breaker.failure_count == 1

    def test_half_open_admits_one_probe(self, clock):
        """Test only one call passes after the cooldown."""
        breaker = CircuitBreaker("api", failure_threshold=1, cooldown=10, clock=clock)
        breaker.record_failure()

        clock.now = 10
        breaker.before_call()

        assert breaker.state is CircuitState.HALF_OPEN
        with pytest.raises(CircuitOpenError):
            breaker.before_call()

    def test_probe_success_closes(self, clock):
        """Test a successful probe closes the circuit."""
        breaker = CircuitBreaker("api", failure_threshold=1, cooldown=10, clock=clock)
        breaker.record_failure()
        clock.now = 10
        breaker.before_call()

        breaker.record_success()

        assert breaker.state is CircuitState.CLOSED
        breaker.before_call()

    def test_probe_failure_extends_cooldown(self, clock):
        """Test a failed probe reopens with a longer, capped cooldown."""
        breaker = CircuitBreaker(
            "api", failure_threshold=1, cooldown=10, cooldown_multiplier=2, max_cooldown=30, clock=clock
        )
        breaker.record_failure()

        clock.now = 10
        breaker.before_call()
        breaker.record_failure()
        assert breaker.state is CircuitState.OPEN
        assert breaker.cooldown == 20

        clock.now = 29
        with pytest.raises(CircuitOpenError):
            breaker.before_call()

        clock.now = 30
        breaker.before_call()
        breaker.record_failure()
        assert breaker.cooldown == 30

    def test_released_probe_can_be_retried(self, clock):
        """Test a probe without a verdict frees the half-open slot."""
        breaker = CircuitBreaker("api", failure_threshold=1, cooldown=10, clock=clock)
        breaker.record_failure()
        clock.now = 10
        breaker.before_call()

        breaker.release_probe()

        breaker.before_call()
        assert breaker.state is CircuitState.HALF_OPEN


@pytest.mark.asyncio
async def test_transient_failure_is_retried(auth_cache, clock, sleeps):
    """Test transient failures are retried until success."""
    attempt = AsyncMock(side_effect=[TransientError("busy", status=503), "ok"])
    policy = make_policy(auth_cache, clock, sleeps)

    result = await policy.execute(endpoints.LIST_BUCKETS, attempt)

    assert result == "ok"
    assert attempt.await_count == 2
    assert len(sleeps.waits) == 1
    attempt.assert_awaited_with("auth-1")


@pytest.mark.asyncio
async def test_exhausted_retries_raise_last_error(auth_cache, clock):
    """Test the final underlying error surfaces, not a wrapper."""
    errors = [TransientError(f"busy {n}", status=503) for n in range(3)]
    attempt = AsyncMock(side_effect=errors)
    policy = make_policy(auth_cache, clock, failure_threshold=10)

    with pytest.raises(TransientError) as exc_info:
        await policy.execute(endpoints.LIST_BUCKETS, attempt)

    assert exc_info.value is errors[-1]
    assert attempt.await_count == 3


@pytest.mark.asyncio
async def test_retry_after_sets_minimum_wait(auth_cache, clock, sleeps):
    """Test Retry-After overrides a shorter backoff."""
    attempt = AsyncMock(side_effect=[TransientError("slow down", status=429, retry_after=4.0), "ok"])
    policy = make_policy(auth_cache, clock, sleeps)

    await policy.execute(endpoints.LIST_BUCKETS, attempt)

    assert sleeps.waits == [4.0]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [PermanentError("bad request", status=400), ProtocolViolationError("garbage")],
)
async def test_non_retryable_errors_surface_immediately(auth_cache, clock, error):
    """Test permanent and protocol errors are not retried."""
    attempt = AsyncMock(side_effect=error)
    policy = make_policy(auth_cache, clock)

    with pytest.raises(type(error)):
        await policy.execute(endpoints.LIST_BUCKETS, attempt)

    assert attempt.await_count == 1


@pytest.mark.asyncio
async def test_auth_invalid_refreshes_once(auth_cache, clock):
    """Test a rejected token is invalidated and the call retried once."""
    auth_cache.get_valid = AsyncMock(side_effect=["auth-1", "auth-2"])
    attempt = AsyncMock(side_effect=[AuthInvalidError("expired", status=401), "ok"])
    policy = make_policy(auth_cache, clock)

    result = await policy.execute(endpoints.LIST_BUCKETS, attempt)

    assert result == "ok"
    auth_cache.invalidate.assert_called_once_with("auth-1")
    attempt.assert_awaited_with("auth-2")


@pytest.mark.asyncio
async def test_auth_invalid_twice_surfaces(auth_cache, clock):
    """Test a second rejection is not retried again."""
    attempt = AsyncMock(side_effect=AuthInvalidError("expired", status=401))
    policy = make_policy(auth_cache, clock)

    with pytest.raises(AuthInvalidError):
        await policy.execute(endpoints.LIST_BUCKETS, attempt)

    assert attempt.await_count == 2
    assert auth_cache.invalidate.call_count == 1


@pytest.mark.asyncio
async def test_capability_invalid_retried_once(auth_cache, clock):
    """Test a rejected upload URL is retried exactly once."""
    attempt = AsyncMock(side_effect=CapabilityInvalidError("expired", status=401))
    policy = make_policy(auth_cache, clock)

    with pytest.raises(CapabilityInvalidError):
        await policy.execute(endpoints.UPLOAD_FILE, attempt)

    assert attempt.await_count == 2
    auth_cache.invalidate.assert_not_called()


@pytest.mark.asyncio
async def test_breaker_fails_fast_after_threshold(auth_cache, clock):
    """Test with threshold 3, calls 4 and 5 never reach the attempt."""
    attempt = AsyncMock(side_effect=lambda auth: _raise(TransientError("down", status=503)))
    policy = make_policy(auth_cache, clock, max_attempts=1)

    outcomes = []
    for _ in range(5):
        with pytest.raises((TransientError, CircuitOpenError)) as exc_info:
            await policy.execute(endpoints.LIST_BUCKETS, attempt)
        outcomes.append(type(exc_info.value))

    assert outcomes == [TransientError] * 3 + [CircuitOpenError] * 2
    assert attempt.await_count == 3


@pytest.mark.asyncio
async def test_breaker_trip_during_retries_surfaces_transient(auth_cache, clock):
    """Test retries stop when the breaker opens and the real failure is raised."""
    attempt = AsyncMock(side_effect=TransientError("down", status=503))
    policy = make_policy(auth_cache, clock, max_attempts=5, failure_threshold=2)

    with pytest.raises(TransientError):
        await policy.execute(endpoints.LIST_BUCKETS, attempt)

    assert attempt.await_count == 2
    assert policy.breaker(endpoints.EndpointClass.API).state is CircuitState.OPEN


@pytest.mark.asyncio
async def test_breakers_are_per_endpoint_class(auth_cache, clock):
    """Test an open API breaker does not block uploads."""
    failing = AsyncMock(side_effect=TransientError("down", status=503))
    policy = make_policy(auth_cache, clock, max_attempts=1, failure_threshold=1)
    with pytest.raises(TransientError):
        await policy.execute(endpoints.LIST_BUCKETS, failing)

    result = await policy.execute(endpoints.UPLOAD_FILE, AsyncMock(return_value="uploaded"))

    assert result == "uploaded"


@pytest.mark.asyncio
async def test_half_open_probe_after_cooldown(auth_cache, clock):
    """Test a successful probe after the cooldown closes the breaker."""
    policy = make_policy(auth_cache, clock, max_attempts=1, failure_threshold=1, cooldown=10)
    with pytest.raises(TransientError):
        await policy.execute(endpoints.LIST_BUCKETS, AsyncMock(side_effect=TransientError("down")))

    clock.now = 10
    result = await policy.execute(endpoints.LIST_BUCKETS, AsyncMock(return_value="ok"))

    assert result == "ok"
    assert policy.breaker(endpoints.EndpointClass.API).state is CircuitState.CLOSED


@pytest.mark.asyncio
async def test_unauthenticated_operation_gets_no_authorization(auth_cache, clock):
    """Test authorize runs without consulting the cache."""
    attempt = AsyncMock(return_value="authorized")
    policy = make_policy(auth_cache, clock)

    await policy.execute(endpoints.AUTHORIZE_ACCOUNT, attempt)

    attempt.assert_awaited_once_with(None)
    auth_cache.get_valid.assert_not_awaited()


@pytest.mark.asyncio
async def test_nested_policy_failure_is_not_retried_again(auth_cache, clock):
    """Test an exhausted inner call surfaces once and spares the outer breaker."""
    policy = make_policy(auth_cache, clock, max_attempts=3, failure_threshold=5)
    fetch_url = AsyncMock(side_effect=lambda auth: _raise(TransientError("down", status=503)))

    async def upload(auth):
        return await policy.execute(endpoints.GET_UPLOAD_URL, fetch_url)

    with pytest.raises(TransientError) as exc_info:
        await policy.execute(endpoints.UPLOAD_FILE, upload)

    assert fetch_url.await_count == 3
    assert exc_info.value.handled
    assert policy.breaker(endpoints.EndpointClass.API).failure_count == 3
    upload_breaker = policy.breaker(endpoints.EndpointClass.UPLOAD)
    assert upload_breaker.failure_count == 0
    assert upload_breaker.state is CircuitState.CLOSED


@pytest.mark.asyncio
async def test_nested_failure_frees_half_open_slot(auth_cache, clock):
    """Test the half-open slot is freed when a nested call fails."""
    policy = make_policy(auth_cache, clock, max_attempts=1, failure_threshold=1, cooldown=10)
    with pytest.raises(TransientError):
        await policy.execute(endpoints.UPLOAD_FILE, AsyncMock(side_effect=TransientError("down")))
    clock.now = 10
    fetch_url = AsyncMock(side_effect=lambda auth: _raise(PermanentError("bad", status=400)))

    async def upload(auth):
        return await policy.execute(endpoints.GET_UPLOAD_URL, fetch_url)

    with pytest.raises(PermanentError):
        await policy.execute(endpoints.UPLOAD_FILE, upload)
    result = await policy.execute(endpoints.UPLOAD_FILE, AsyncMock(return_value="uploaded"))

    assert result == "uploaded"
    assert policy.breaker(endpoints.EndpointClass.UPLOAD).state is CircuitState.CLOSED
