"""Dependency injection container and engine wiring."""

from __future__ import annotations

from typing import Any, Callable, TypeVar

from prometheus_client import CollectorRegistry

from reldb.adapters.inbound.sql_parser import SQLParser
from reldb.adapters.outbound.file_commit_log import FileCommitLog
from reldb.adapters.outbound.memory_commit_log import InMemoryCommitLog
from reldb.application.evaluator import RowExpressionEvaluator
from reldb.domain.services.btree_index import BTreeIndexManager
from reldb.domain.services.catalog import Catalog
from reldb.domain.services.lock_manager import LockManager
from reldb.domain.services.storage_engine import StorageEngine
from reldb.domain.services.transaction_manager import MVCCTransactionManager
from reldb.domain.services.trigger_registry import TriggerRegistry
from reldb.domain.value_objects import IsolationLevel
from reldb.infrastructure.config import Config
from reldb.infrastructure.metrics import MetricsRegistry, get_metrics
from reldb.ports.outbound.commit_log import CommitLog, SyncMode

T = TypeVar("T")


class Container:
    """
    Simple dependency injection container.

    Instances are either registered up front or built on first resolve by a
    factory that receives the container.
    """

    def __init__(self) -> None:
        self._factories: dict[type, Callable[[Container], Any]] = {}
        self._instances: dict[type, Any] = {}

    def register_singleton(self, interface: type[T], instance: T) -> None:
        """
        Register a ready-made instance.

        Args:
            interface: The type the instance is resolved by
            instance: The instance
        """
        self._instances[interface] = instance

    def register_factory(
        self,
        interface: type[T],
        factory: Callable[[Container], T],
    ) -> None:
        """
        Register a factory; its result is cached on first resolve.

        Args:
            interface: The type the product is resolved by
            factory: Builds the instance from the container
        """
        self._factories[interface] = factory
        self._instances.pop(interface, None)

    def resolve(self, interface: type[T]) -> T:
        """
        Resolve a dependency.

        Raises:
            KeyError: If nothing is registered for the interface
        """
        if interface in self._instances:
            return self._instances[interface]

        if interface in self._factories:
            instance = self._factories[interface](self)
            self._instances[interface] = instance
            return instance

        raise KeyError(f"No registration found for {interface}")

    def has(self, interface: type) -> bool:
        """Check if an interface is registered."""
        return interface in self._instances or interface in self._factories

    def clear(self) -> None:
        """Clear all registrations and instances."""
        self._factories.clear()
        self._instances.clear()


def _commit_log(config: Config) -> CommitLog:
    storage = config.storage
    if not storage.commit_log_enabled:
        return InMemoryCommitLog()
    config.ensure_directories()
    return FileCommitLog(storage.commit_log_path, SyncMode(storage.sync_mode))


def build_container(
    config: Config,
    registry: CollectorRegistry | None = None,
) -> Container:
    """
    Wire the engine's components for one database instance.

    Args:
        config: Engine configuration
        registry: Prometheus registry for the instruments; defaults to the
            process-wide registry when metrics are enabled and a private one
            otherwise

    Returns:
        A container resolving every component by its class
    """
    from reldb.application.database_engine import DatabaseEngine

    container = Container()
    container.register_singleton(Config, config)

    if registry is not None:
        metrics = MetricsRegistry(registry)
    elif config.observability.metrics_enabled:
        metrics = get_metrics()
    else:
        metrics = MetricsRegistry(CollectorRegistry())
    container.register_singleton(MetricsRegistry, metrics)

    container.register_factory(CommitLog, lambda c: _commit_log(c.resolve(Config)))
    container.register_factory(Catalog, lambda c: Catalog())
    container.register_factory(
        SQLParser, lambda c: SQLParser(c.resolve(Config).query.dialect)
    )
    container.register_factory(
        LockManager,
        lambda c: LockManager(
            timeout_ms=c.resolve(Config).transaction.lock_timeout_ms,
            deadlock_detection=c.resolve(Config).transaction.deadlock_detection,
            wait_observer=c.resolve(MetricsRegistry).lock_wait_seconds.observe,
        ),
    )
    container.register_factory(
        StorageEngine,
        lambda c: StorageEngine(
            BTreeIndexManager(c.resolve(Config).storage.btree_max_keys),
            c.resolve(LockManager),
            RowExpressionEvaluator(),
        ),
    )
    container.register_factory(
        MVCCTransactionManager,
        lambda c: MVCCTransactionManager(
            c.resolve(Catalog),
            c.resolve(StorageEngine),
            c.resolve(LockManager),
            commit_log=c.resolve(CommitLog),
            default_isolation=IsolationLevel[c.resolve(Config).transaction.default_isolation_level],
        ),
    )
    container.register_factory(TriggerRegistry, lambda c: TriggerRegistry())
    container.register_factory(
        DatabaseEngine, lambda c: DatabaseEngine(c.resolve(Config), container=c)
    )
    return container


# Global container instance
_container: Container | None = None


def get_container(config: Config | None = None) -> Container:
    """Get the process-wide container, building it on first use."""
    global _container
    if _container is None:
        if config is None:
            from reldb.infrastructure.config import get_config

            config = get_config()
        _container = build_container(config)
    return _container


def reset_container() -> None:
    """Forget the process-wide container (for testing)."""
    global _container
    _container = None
