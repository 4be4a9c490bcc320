"""Reliability gateway for model-provider calls.

Every completion request goes through three guards, in this order:

    rate limiter  →  circuit breaker  →  provider call (with timeout)
         ↑                                        │
         └────── retry with backoff + jitter ─────┘   (transient kinds only)

* **TokenBucketRateLimiter**: callers over the limit wait in a bounded
  queue; once the queue is full, further callers fail fast with
  ``ThrottledError``.
* **CircuitBreaker**: rolling failure ratio over the last N calls.
  CLOSED → OPEN when the ratio crosses the threshold, OPEN → HALF_OPEN
  after the cooldown, and a single trial call decides HALF_OPEN → CLOSED
  (success) or HALF_OPEN → OPEN (failure, cooldown restarts).
* **ReliabilityGateway**: owns the retry loop and the per-call timeout,
  and is the only place provider errors are classified.

The limiter and breaker are process-wide per provider identity.  They are
injected into the gateway rather than held as module globals, and both
take an injectable clock so tests can drive them deterministically.
Their bookkeeping never awaits while holding the lock, so a plain
``threading.Lock`` is safe from both threads and coroutines.
"""

from __future__ import annotations

import asyncio
import logging
import random
import threading
import time
from collections import deque
from collections.abc import Awaitable, Callable
from enum import Enum

from procurement_agent import config
from procurement_agent.errors import (
    TRANSIENT_PROVIDER_ERRORS,
    CircuitOpenError,
    ProviderError,
    ProviderErrorKind,
    ProviderRequestError,
    ProviderUnavailableError,
    ThrottledError,
)
from procurement_agent.llm import (
    AnthropicProvider,
    Completion,
    CompletionRequest,
    ModelProvider,
    classify_provider_error,
)
from procurement_agent.services.metrics import MetricsClient
from procurement_agent.services.metrics import metrics as default_metrics

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]

# Kinds that mean the provider answered and the request itself was bad.
# They are not retried and do not count against the breaker.
_CLIENT_SIDE_KINDS = frozenset({ProviderErrorKind.AUTH, ProviderErrorKind.MALFORMED_REQUEST})


# ── Rate limiter ─────────────────────────────────────────────────────


class TokenBucketRateLimiter:
    """Async token bucket with a bounded wait queue."""

    def __init__(
        self,
        rate_per_minute: int = config.PROVIDER_RPM_LIMIT,
        *,
        burst: int | None = None,
        max_queue_depth: int = config.RATE_LIMIT_QUEUE_DEPTH,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if rate_per_minute <= 0:
            raise ValueError("rate_per_minute must be positive")
        self._rate = rate_per_minute / 60.0  # tokens per second
        self._capacity = float(burst if burst is not None else rate_per_minute)
        self._max_queue_depth = max_queue_depth
        self._clock = clock
        self._sleep = sleep
        self._tokens = self._capacity
        self._updated = clock()
        self._waiting = 0
        self._lock = threading.Lock()

    @property
    def queue_depth(self) -> int:
        return self._waiting

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated)
        self._tokens = min(self._capacity, self._tokens + elapsed * self._rate)
        self._updated = now

    def _try_take(self) -> float:
        """Take a token if one is available; otherwise return seconds to wait."""
        self._refill()
        if self._tokens >= 1:
            self._tokens -= 1
            return 0.0
        return (1 - self._tokens) / self._rate

    async def acquire(self) -> None:
        with self._lock:
            # Queued callers go first; a newcomer only skips the queue when it is empty.
            if self._waiting == 0 and self._try_take() == 0.0:
                return
            if self._waiting >= self._max_queue_depth:
                raise ThrottledError(
                    f"Rate limiter queue is full ({self._max_queue_depth} waiting)"
                )
            self._waiting += 1

        try:
            while True:
                with self._lock:
                    wait = self._try_take()
                if wait == 0.0:
                    return
                await self._sleep(wait)
        finally:
            with self._lock:
                self._waiting -= 1


# ── Circuit breaker ──────────────────────────────────────────────────


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Failure-ratio circuit breaker with a single half-open trial."""

    def __init__(
        self,
        name: str = config.PROVIDER_NAME,
        *,
        failure_threshold: float = config.CIRCUIT_FAILURE_THRESHOLD,
        window_size: int = config.CIRCUIT_WINDOW_SIZE,
        minimum_calls: int = config.CIRCUIT_MINIMUM_CALLS,
        cooldown: float = config.CIRCUIT_COOLDOWN_SECONDS,
        clock: Clock = time.monotonic,
        metrics: MetricsClient | None = None,
    ) -> None:
        if not 0 < failure_threshold <= 1:
            raise ValueError("failure_threshold must be in (0, 1]")
        self.name = name
        self._threshold = failure_threshold
        self._minimum_calls = max(1, min(minimum_calls, window_size))
        self._cooldown = cooldown
        self._clock = clock
        self._metrics = metrics or default_metrics
        self._window: deque[bool] = deque(maxlen=window_size)  # True = failure
        self._state = CircuitState.CLOSED
        self._opened_at = 0.0
        self._trial_in_flight = False
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._maybe_half_open()
            return self._state

    def _transition(self, to_state: CircuitState) -> None:
        from_state = self._state
        if from_state is to_state:
            return
        self._state = to_state
        if to_state is CircuitState.OPEN:
            self._opened_at = self._clock()
            logger.warning(
                "Circuit %s %s → open (cooldown %.0fs)", self.name, from_state.value, self._cooldown,
            )
        else:
            logger.info("Circuit %s %s → %s", self.name, from_state.value, to_state.value)
        self._metrics.record_circuit_transition(self.name, from_state.value, to_state.value)

    def _maybe_half_open(self) -> None:
        if (
            self._state is CircuitState.OPEN
            and self._clock() - self._opened_at >= self._cooldown
        ):
            self._trial_in_flight = False
            self._transition(CircuitState.HALF_OPEN)

    def before_call(self) -> None:
        """Admit a call or raise ``CircuitOpenError`` without contacting the provider."""
        with self._lock:
            self._maybe_half_open()
            if self._state is CircuitState.OPEN:
                raise CircuitOpenError(f"Circuit {self.name} is open")
            if self._state is CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    raise CircuitOpenError(f"Circuit {self.name} trial call already in flight")
                self._trial_in_flight = True

    def release_trial(self) -> None:
        """Give back an admitted trial that ended without an outcome (e.g. cancelled)."""
        with self._lock:
            if self._state is CircuitState.HALF_OPEN:
                self._trial_in_flight = False

    def record_success(self) -> None:
        with self._lock:
            if self._state is CircuitState.HALF_OPEN:
                self._trial_in_flight = False
                self._window.clear()
                self._transition(CircuitState.CLOSED)
                return
            self._window.append(False)

    def record_failure(self) -> None:
        with self._lock:
            if self._state is CircuitState.HALF_OPEN:
                self._trial_in_flight = False
                self._transition(CircuitState.OPEN)
                return
            self._window.append(True)
            if self._state is CircuitState.CLOSED and len(self._window) >= self._minimum_calls:
                ratio = sum(self._window) / len(self._window)
                if ratio >= self._threshold:
                    self._transition(CircuitState.OPEN)


# ── Gateway ──────────────────────────────────────────────────────────


class ReliabilityGateway:
    """Executes completion requests under rate limiting, retries and circuit breaking."""

    OPERATION = "complete"

    def __init__(
        self,
        provider: ModelProvider,
        rate_limiter: TokenBucketRateLimiter,
        circuit_breaker: CircuitBreaker,
        *,
        max_attempts: int = config.PROVIDER_MAX_ATTEMPTS,
        initial_backoff: float = config.RETRY_INITIAL_BACKOFF_SECONDS,
        max_backoff: float = config.RETRY_MAX_BACKOFF_SECONDS,
        timeout: float = config.PROVIDER_TIMEOUT_SECONDS,
        sleep: Sleep = asyncio.sleep,
        rng: random.Random | None = None,
        metrics: MetricsClient | None = None,
    ) -> None:
        self.provider = provider
        self.rate_limiter = rate_limiter
        self.circuit_breaker = circuit_breaker
        self._max_attempts = max(1, max_attempts)
        self._initial_backoff = initial_backoff
        self._max_backoff = max_backoff
        self._timeout = timeout
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._metrics = metrics or default_metrics

    def backoff_delay(self, attempt: int) -> float:
        """Delay after failed *attempt* (1-based): exponential, capped, half jitter."""
        ceiling = min(self._max_backoff, self._initial_backoff * (2 ** (attempt - 1)))
        return ceiling / 2 + self._rng.uniform(0, ceiling / 2)

    async def execute(self, request: CompletionRequest) -> Completion:
        service = self.provider.name

        for attempt in range(1, self._max_attempts + 1):
            try:
                await self.rate_limiter.acquire()
            except ThrottledError:
                self._metrics.record_throttled(service)
                logger.warning("%s call throttled: rate limiter queue is full", service)
                raise

            self.circuit_breaker.before_call()

            t0 = time.perf_counter()
            try:
                completion = await asyncio.wait_for(
                    self.provider.complete(request), timeout=self._timeout,
                )
            except Exception as exc:
                elapsed = (time.perf_counter() - t0) * 1000
                kind = exc.kind if isinstance(exc, ProviderError) else classify_provider_error(exc)
                if kind is None:
                    self.circuit_breaker.record_failure()
                    self._metrics.record_failure(
                        service, self.OPERATION, error_type=type(exc).__name__, latency_ms=elapsed,
                    )
                    raise

                self._metrics.record_failure(
                    service, self.OPERATION, error_type=kind.value, latency_ms=elapsed,
                )
                if kind in _CLIENT_SIDE_KINDS:
                    self.circuit_breaker.record_success()
                    logger.error("%s rejected the request (%s): %s", service, kind.value, exc)
                    raise ProviderRequestError(kind, str(exc)) from exc

                self.circuit_breaker.record_failure()
                if kind not in TRANSIENT_PROVIDER_ERRORS:
                    logger.error("%s unavailable (%s): %s", service, kind.value, exc)
                    raise ProviderUnavailableError(kind, str(exc)) from exc

                if attempt == self._max_attempts:
                    logger.error(
                        "%s call failed after %d attempts (%s)", service, attempt, kind.value,
                    )
                    raise ProviderUnavailableError(
                        kind, f"{service} failed after {attempt} attempts: {exc}",
                    ) from exc

                delay = self.backoff_delay(attempt)
                self._metrics.record_retry(service, self.OPERATION, attempt)
                logger.warning(
                    "%s attempt %d/%d failed (%s), retrying in %.2fs",
                    service, attempt, self._max_attempts, kind.value, delay,
                )
                await self._sleep(delay)
                continue
            except BaseException:
                # Cancelled mid-call: no verdict on the provider.
                self.circuit_breaker.release_trial()
                raise

            elapsed = (time.perf_counter() - t0) * 1000
            self.circuit_breaker.record_success()
            self._metrics.record_success(service, self.OPERATION, latency_ms=elapsed)
            usage = completion.usage
            if usage is not None:
                self._metrics.record_token_usage(
                    service, usage.model, usage.input_tokens, usage.output_tokens, usage.estimated_cost,
                )
            return completion

        raise AssertionError("unreachable")  # pragma: no cover


def build_gateway(provider: ModelProvider | None = None) -> ReliabilityGateway:
    """Wire a gateway from ``procurement_agent.config`` defaults."""
    provider = provider or AnthropicProvider()
    return ReliabilityGateway(
        provider,
        TokenBucketRateLimiter(),
        CircuitBreaker(provider.name),
    )
