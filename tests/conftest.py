"""Pytest configuration and fixtures for reldb tests."""

from __future__ import annotations

import tempfile
from pathlib import Path
from typing import Callable, Generator

import pytest
from prometheus_client import CollectorRegistry

from reldb.application import DatabaseEngine
from reldb.infrastructure.config import (
    Config,
    StorageConfig,
    TransactionConfig,
)
from reldb.infrastructure.container import Container, build_container, reset_container
from reldb.infrastructure.metrics import MetricsRegistry


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Provide a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def test_config(temp_dir: Path) -> Config:
    """Configuration with an in-memory commit log and short lock waits."""
    return Config(
        storage=StorageConfig(
            data_dir=temp_dir / "data",
            commit_log_enabled=False,
            sync_mode="none",
            btree_max_keys=4,  # Small nodes exercise splits
        ),
        transaction=TransactionConfig(lock_timeout_ms=2000),
    )


@pytest.fixture
def durable_config(temp_dir: Path) -> Config:
    """Configuration with a file commit log under temp_dir."""
    return Config(
        storage=StorageConfig(
            data_dir=temp_dir / "data",
            commit_log_enabled=True,
            sync_mode="flush",
        ),
        transaction=TransactionConfig(lock_timeout_ms=2000),
    )


@pytest.fixture
def collector_registry() -> CollectorRegistry:
    """A private Prometheus registry so instruments never collide."""
    return CollectorRegistry(auto_describe=True)


@pytest.fixture
def metrics_registry(collector_registry: CollectorRegistry) -> MetricsRegistry:
    """Provide a fresh metrics registry for each test."""
    return MetricsRegistry(registry=collector_registry)


@pytest.fixture
def container(
    test_config: Config, collector_registry: CollectorRegistry
) -> Generator[Container, None, None]:
    """Provide a freshly wired container for each test."""
    reset_container()
    c = build_container(test_config, registry=collector_registry)
    yield c
    c.clear()


@pytest.fixture
def engine(container: Container) -> Generator[DatabaseEngine, None, None]:
    """A started engine with an in-memory commit log."""
    db = container.resolve(DatabaseEngine)
    db.start()
    yield db
    db.stop()


@pytest.fixture
def metric_value(collector_registry: CollectorRegistry) -> Callable[..., float]:
    """Read a sample from the test registry; 0.0 when never recorded."""

    def read(name: str, **labels: str) -> float:
        value = collector_registry.get_sample_value(name, labels)
        return value if value is not None else 0.0

    return read


# Markers for test categories
def pytest_configure(config: pytest.Config) -> None:
    """Configure custom pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "slow: Slow tests")
