"""
Resilience utilities for calls to external collaborators.

``retry_with_backoff`` retries flaky calls (git pushes, SDK reads) and
``CircuitBreaker`` stops hammering the review API once it keeps failing.
"""

import asyncio
import logging
import time
from enum import Enum
from functools import wraps
from typing import Awaitable, Callable, Iterator, Optional, ParamSpec, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # calls pass through
    OPEN = "open"  # calls rejected until the recovery timeout elapses
    HALF_OPEN = "half_open"  # a few probe calls decide between CLOSED and OPEN


class CircuitBreakerOpenError(Exception):
    """The breaker rejected a call without attempting it."""


def backoff_delays(
    max_retries: int,
    base_delay: float,
    max_delay: float,
    exponential_base: float = 2.0,
) -> Iterator[float]:
    """Yield the wait before each retry; one fewer value than attempts."""
    for retry in range(max_retries - 1):
        yield min(base_delay * exponential_base ** retry, max_delay)


def retry_with_backoff(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    exceptions: Tuple[Type[BaseException], ...] = (Exception,),
):
    """
    Decorator retrying a function with exponential backoff.

    Coroutine functions wait with ``asyncio.sleep``; plain functions wait with
    ``time.sleep`` and are expected to run in a worker thread. Exceptions not
    listed in ``exceptions`` propagate on the first occurrence, and the last
    listed exception propagates once ``max_retries`` attempts are used up.

    Example:
        @retry_with_backoff(max_retries=3, base_delay=1.0, exceptions=(GitCommandError,))
        def _push(self, branch):
            ...
    """

    def decorator(func: Callable[P, T]) -> Callable[P, T]:
        name = func.__name__

        def announce(attempt: int, error: BaseException, delay: float) -> None:
            logger.warning(
                f"{name} attempt {attempt}/{max_retries} failed: {error}. Retrying in {delay:.1f}s"
            )

        if asyncio.iscoroutinefunction(func):

            @wraps(func)
            async def retrying_coroutine(*args: P.args, **kwargs: P.kwargs) -> T:
                delays = backoff_delays(max_retries, base_delay, max_delay, exponential_base)
                attempt = 1
                while True:
                    try:
                        return await func(*args, **kwargs)
                    except exceptions as e:
                        delay = next(delays, None)
                        if delay is None:
                            logger.error(f"{name} gave up after {attempt} attempts: {e}")
                            raise
                        announce(attempt, e, delay)
                    await asyncio.sleep(delay)
                    attempt += 1

            return retrying_coroutine

        @wraps(func)
        def retrying_function(*args: P.args, **kwargs: P.kwargs) -> T:
            delays = backoff_delays(max_retries, base_delay, max_delay, exponential_base)
            attempt = 1
            while True:
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    delay = next(delays, None)
                    if delay is None:
                        logger.error(f"{name} gave up after {attempt} attempts: {e}")
                        raise
                    announce(attempt, e, delay)
                time.sleep(delay)
                attempt += 1

        return retrying_function

    return decorator


class CircuitBreaker:
    """
    Circuit breaker around one external service.

    ``failure_threshold`` consecutive failures open the circuit. After
    ``timeout`` seconds the next calls are let through as probes; the circuit
    closes once ``half_open_max_calls`` probes succeed and reopens on the
    first probe failure.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: float = 60,
        half_open_max_calls: int = 3,
        service: str = "service",
    ):
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.half_open_max_calls = half_open_max_calls
        self.service = service

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.opened_at: Optional[float] = None
        self.probes_started = 0
        self.probes_succeeded = 0

    def _transition(self, state: CircuitState, why: str) -> None:
        log = logger.info if state == CircuitState.CLOSED else logger.warning
        log(f"Circuit for {self.service} {self.state.value} -> {state.value}: {why}")
        self.state = state
        self.probes_started = 0
        self.probes_succeeded = 0
        if state == CircuitState.OPEN:
            self.opened_at = time.monotonic()
        elif state == CircuitState.CLOSED:
            self.failure_count = 0
            self.opened_at = None

    def _admit(self) -> None:
        if self.state == CircuitState.OPEN:
            waited = time.monotonic() - (self.opened_at or 0.0)
            if waited < self.timeout:
                raise CircuitBreakerOpenError(
                    f"{self.service} circuit is open, retry in {self.timeout - waited:.0f}s"
                )
            self._transition(CircuitState.HALF_OPEN, f"{self.timeout}s recovery timeout elapsed")

        if self.state == CircuitState.HALF_OPEN:
            if self.probes_started >= self.half_open_max_calls:
                raise CircuitBreakerOpenError(f"{self.service} circuit is waiting on probe calls")
            self.probes_started += 1

    async def call(
        self,
        func: Callable[[], Awaitable[T]],
        healthy: Tuple[Type[BaseException], ...] = (),
    ) -> T:
        """
        Run an async callable unless the circuit is open.

        Exceptions listed in ``healthy`` propagate but count as a response
        from a working service.

        Raises:
            CircuitBreakerOpenError: If the call was rejected
        """
        self._admit()
        try:
            result = await func()
        except healthy:
            self.record_success()
            raise
        except Exception as e:
            self.record_failure(e)
            raise
        self.record_success()
        return result

    def record_success(self) -> None:
        if self.state == CircuitState.HALF_OPEN:
            self.probes_succeeded += 1
            if self.probes_succeeded >= self.half_open_max_calls:
                self._transition(CircuitState.CLOSED, "service recovered")
            return
        self.failure_count = 0

    def record_failure(self, error: Optional[BaseException] = None) -> None:
        self.failure_count += 1
        if self.state == CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN, f"probe failed: {error}")
        elif self.state == CircuitState.CLOSED and self.failure_count >= self.failure_threshold:
            self._transition(CircuitState.OPEN, f"{self.failure_count} consecutive failures")

    def reset(self) -> None:
        """Force the circuit closed."""
        self._transition(CircuitState.CLOSED, "reset")


def create_azure_devops_circuit_breaker() -> CircuitBreaker:
    """Create circuit breaker configured for Azure DevOps API calls."""
    return CircuitBreaker(failure_threshold=5, timeout=60, half_open_max_calls=3, service="azure_devops")
