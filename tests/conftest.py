"""
Shared test fixtures and configuration.
"""

from collections.abc import Callable

import pytest

from stateplane.adapters.mock import MockProvider
from stateplane.adapters.registry import ProviderRegistry
from stateplane.core.engine.scope import Scope
from stateplane.core.observability.telemetry import MetricsTelemetry
from stateplane.core.persistence.memory_store import MemoryStateStore
from stateplane.core.secrets.codec import SecretCodec

# Low PBKDF2 cost for tests (production default: 480k)
TEST_ITERATIONS = 1000
TEST_PASSPHRASE = "correct horse battery staple"


@pytest.fixture
def codec() -> SecretCodec:
    return SecretCodec(TEST_PASSPHRASE, TEST_ITERATIONS)


@pytest.fixture
def queues() -> MockProvider:
    return MockProvider("Queue")


@pytest.fixture
def workers() -> MockProvider:
    return MockProvider("Worker")


@pytest.fixture
def registry(queues: MockProvider, workers: MockProvider) -> ProviderRegistry:
    return ProviderRegistry([queues, workers])


@pytest.fixture
def store() -> MemoryStateStore:
    """State shared by every run of one test."""
    return MemoryStateStore("shop/dev")


@pytest.fixture
def telemetry() -> MetricsTelemetry:
    return MetricsTelemetry()


@pytest.fixture
def new_run(
    store: MemoryStateStore,
    codec: SecretCodec,
    registry: ProviderRegistry,
    telemetry: MetricsTelemetry,
) -> Callable[..., Scope]:
    """Factory for successive runs against the same state."""

    def _new_run(**kwargs) -> Scope:
        kwargs.setdefault("telemetry", telemetry)
        return Scope(
            "shop",
            "dev",
            kwargs.pop("store", store),
            kwargs.pop("codec", codec),
            kwargs.pop("providers", registry),
            **kwargs,
        ).open()

    return _new_run
