"""Shared test fixtures for the procurement agent test suite."""

from __future__ import annotations

import asyncio
import os

import pytest


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py won't fail on module load.
    """
    os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key-123")
    os.environ.setdefault("METRICS_ENABLED", "false")
    # The suite always runs against the in-memory demo catalog.
    os.environ.pop("PROCUREMENT_API_URL", None)


# ── Deterministic fakes ──────────────────────────────────────────────


class ManualClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Async sleep replacement that records delays and advances a clock."""

    def __init__(self, clock: ManualClock | None = None) -> None:
        self.calls: list[float] = []
        self._clock = clock

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if self._clock is not None:
            self._clock.advance(seconds)
        await asyncio.sleep(0)


class ScriptedProvider:
    """Model provider that replays a fixed script.

    Each step is a ``Completion``, an exception to raise, or a callable
    taking the ``CompletionRequest`` and returning a ``Completion``.
    """

    def __init__(self, script, name: str = "fake") -> None:
        self.name = name
        self._script = list(script)
        self.requests = []

    async def complete(self, request):
        self.requests.append(request)
        if not self._script:
            raise AssertionError("ScriptedProvider ran out of steps")
        step = self._script.pop(0)
        if isinstance(step, BaseException):
            raise step
        if callable(step):
            return step(request)
        return step


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def scripted_provider():
    """The ScriptedProvider class, for tests that build their own gateway."""
    return ScriptedProvider


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def clocked_sleep(clock):
    """RecordingSleep that advances the shared manual clock."""
    return RecordingSleep(clock)


@pytest.fixture
def metrics_client():
    """A disabled MetricsClient, so tests can inspect its buffer."""
    from procurement_agent.services.metrics import MetricsClient

    return MetricsClient()


@pytest.fixture
def make_orchestrator(metrics_client):
    """Factory wiring a TurnOrchestrator around a ScriptedProvider.

    Returns ``(orchestrator, provider, services, store)``.
    """
    from procurement_agent.agent import TurnOrchestrator
    from procurement_agent.services.conversation_store import InMemoryConversationStore
    from procurement_agent.services.demo_catalog import InMemoryProcurementServices
    from procurement_agent.services.reliability import (
        CircuitBreaker,
        ReliabilityGateway,
        TokenBucketRateLimiter,
    )
    from procurement_agent.tools.executor import ToolExecutor
    from procurement_agent.tools.registry import build_default_registry

    def _make(script, *, services=None, store=None, max_attempts=1, breaker=None, **kwargs):
        provider = ScriptedProvider(script)
        gateway = ReliabilityGateway(
            provider,
            TokenBucketRateLimiter(6_000, max_queue_depth=10),
            breaker or CircuitBreaker("fake", metrics=metrics_client),
            max_attempts=max_attempts,
            sleep=RecordingSleep(),
            metrics=metrics_client,
        )
        registry = build_default_registry()
        services = services or InMemoryProcurementServices()
        store = store or InMemoryConversationStore()
        orchestrator = TurnOrchestrator(
            gateway,
            registry,
            ToolExecutor(registry, services, metrics=metrics_client),
            services,
            store,
            **kwargs,
        )
        return orchestrator, provider, services, store

    return _make
