"""Configuration management for the query engine."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class StorageConfig(BaseModel):
    """Storage and durability configuration."""

    data_dir: Path = Field(default=Path("./data"), description="Data directory path")
    commit_log_enabled: bool = Field(
        default=True, description="Persist commits to a file (in-memory log when false)"
    )
    commit_log_file: str = Field(
        default="commit.log", description="Commit log file name inside data_dir"
    )
    sync_mode: Literal["fsync", "flush", "none"] = Field(
        default="fsync", description="Commit log sync mode"
    )
    btree_max_keys: int = Field(
        default=64, ge=4, le=4096, description="Maximum keys per B+Tree node"
    )

    @property
    def commit_log_path(self) -> Path:
        return self.data_dir / self.commit_log_file


class TransactionConfig(BaseModel):
    """Transaction and locking configuration."""

    default_isolation_level: Literal[
        "READ_UNCOMMITTED", "READ_COMMITTED", "REPEATABLE_READ", "SERIALIZABLE"
    ] = Field(default="READ_COMMITTED", description="Isolation level when BEGIN names none")
    lock_timeout_ms: int = Field(default=5000, ge=0, description="Maximum lock wait in ms")
    deadlock_detection: bool = Field(default=True, description="Search the wait-for graph")


class QueryConfig(BaseModel):
    """Query planning and execution configuration."""

    max_recursion_depth: int = Field(
        default=1000, ge=1, description="Iteration cap for WITH RECURSIVE"
    )
    dialect: str = Field(default="postgres", description="sqlglot dialect for parsing")


class ServerConfig(BaseModel):
    """REST server configuration."""

    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8080, ge=1, le=65535, description="Server port")
    workers: int = Field(default=1, ge=1, le=64, description="Uvicorn worker processes")


class ObservabilityConfig(BaseModel):
    """Observability configuration."""

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Log level"
    )
    log_format: Literal["json", "console"] = Field(default="json", description="Log format")
    metrics_enabled: bool = Field(default=False, description="Start the Prometheus exporter")
    metrics_port: int = Field(default=8001, ge=1, le=65535, description="Prometheus metrics port")
    otel_endpoint: str | None = Field(
        default=None, description="OpenTelemetry collector endpoint"
    )
    otel_service_name: str = Field(default="reldb", description="Service name for tracing")


class Config(BaseSettings):
    """Main configuration for the query engine."""

    model_config = SettingsConfigDict(
        env_prefix="RELDB_",
        env_nested_delimiter="__",
        env_file=".env",
        extra="ignore",
        case_sensitive=False,
    )

    storage: StorageConfig = Field(default_factory=StorageConfig)
    transaction: TransactionConfig = Field(default_factory=TransactionConfig)
    query: QueryConfig = Field(default_factory=QueryConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)

    def ensure_directories(self) -> None:
        """Ensure the data directory exists when the commit log is on disk."""
        if self.storage.commit_log_enabled:
            self.storage.data_dir.mkdir(parents=True, exist_ok=True)


@lru_cache
def get_config() -> Config:
    """Get the global configuration instance."""
    config = Config()
    config.ensure_directories()
    return config
