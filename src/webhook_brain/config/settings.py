"""
Configuration management for Webhook Brain.

Handles loading, validation, and management of engine configuration
from files and environment variables.
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# Base64 expands inline payloads by 4/3; the rest of the descriptor
# (ids, url, timestamps) must fit into this margin.
DESCRIPTOR_ENVELOPE_MARGIN_BYTES = 8192


def _resolve_env(value: Optional[str], default_env: Optional[str] = None) -> Optional[str]:
    """Resolve ``${VAR}`` placeholders and fall back to a default variable."""
    if value is None:
        return os.getenv(default_env) if default_env else None
    if isinstance(value, str) and value.startswith("${") and value.endswith("}"):
        return os.getenv(value[2:-1])
    return value


class ServerConfig(BaseModel):
    """Configuration for process-level behavior."""

    log_level: str = Field(default="INFO", description="Logging level")
    drain_timeout_seconds: float = Field(
        default=30.0, ge=0, description="How long to wait for queued work after input ends"
    )
    shutdown_grace_seconds: float = Field(
        default=10.0, ge=0, description="How long in-flight deliveries may finish on stop"
    )
    fanout_attempts: int = Field(
        default=3, ge=1, description="Attempts to fan out one event before giving up"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v_upper


class RegistryConfig(BaseModel):
    """Where the registration state (targets, filters, subscriptions) is read from."""

    source: Literal["file", "rest"] = Field(default="file", description="Registration source")
    path: Optional[str] = Field(default=None, description="JSON snapshot path (file source)")
    base_url: Optional[str] = Field(default=None, description="Registration API base URL")
    api_key: Optional[str] = Field(
        default=None, validate_default=True, description="Registration API key"
    )
    timeout_seconds: float = Field(default=10.0, gt=0, description="Request timeout")
    max_retries: int = Field(default=3, ge=1, description="Attempts per load")

    @field_validator("api_key", mode="before")
    @classmethod
    def resolve_api_key(cls, v: Optional[str]) -> Optional[str]:
        """Resolve API key from environment variable if needed."""
        return _resolve_env(v, "WEBHOOK_BRAIN_REGISTRY_API_KEY")

    @model_validator(mode="after")
    def check_source_location(self) -> "RegistryConfig":
        if self.source == "rest" and not self.base_url:
            raise ValueError("registry.base_url is required for the rest source")
        if self.base_url and not self.base_url.startswith(("http://", "https://")):
            raise ValueError("registry.base_url must start with http:// or https://")
        return self


class CacheConfig(BaseModel):
    """Configuration for the subscription cache."""

    refresh_interval_seconds: float = Field(
        default=30.0, gt=0, description="Snapshot rebuild interval (staleness bound)"
    )


class FanoutConfig(BaseModel):
    """Configuration for the fan-out engine."""

    inline_threshold_bytes: int = Field(
        default=180 * 1024,
        ge=0,
        description="Largest payload carried inline in a delivery descriptor",
    )


class QueueConfig(BaseModel):
    """Configuration for the dispatch queue."""

    backend: Literal["memory", "journal"] = Field(
        default="memory", description="In-process only, or journaled to a file"
    )
    journal_path: Optional[str] = Field(default=None, description="File for the journal backend")
    fsync: bool = Field(default=False, description="fsync the journal after every write")
    max_message_bytes: int = Field(default=256 * 1024, gt=0, description="Transport size limit")
    visibility_timeout_seconds: float = Field(default=60.0, gt=0, description="Lease duration")
    receive_batch_size: int = Field(default=10, ge=1, description="Leases per receive call")
    poll_interval_seconds: float = Field(default=0.5, gt=0, description="Idle poll interval")
    max_visible_backlog: Optional[int] = Field(
        default=10_000, ge=0, description="Visible descriptors above which health is degraded"
    )

    @model_validator(mode="after")
    def check_journal_path(self) -> "QueueConfig":
        if self.backend == "journal" and not self.journal_path:
            raise ValueError("queue.journal_path is required for the journal backend")
        return self


class IngestConfig(BaseModel):
    """Configuration for the inbound event stream."""

    derive_missing_event_ids: bool = Field(
        default=False,
        description=(
            "Derive an absent event id from type and payload; identical records "
            "then share one identity and receivers deduplicate them"
        ),
    )


class PayloadStoreConfig(BaseModel):
    """Configuration for the large-payload store."""

    backend: Literal["memory", "filesystem"] = Field(default="memory")
    directory: Optional[str] = Field(default=None, description="Root for the filesystem backend")
    retention_seconds: float = Field(
        default=48 * 3600, gt=0, description="Minimum payload retention after last write"
    )

    @model_validator(mode="after")
    def check_directory(self) -> "PayloadStoreConfig":
        if self.backend == "filesystem" and not self.directory:
            raise ValueError("payload_store.directory is required for the filesystem backend")
        return self


class DispatcherConfig(BaseModel):
    """Configuration for outbound HTTP dispatch."""

    workers: int = Field(default=16, ge=1, description="Concurrent dispatch workers")
    per_target_concurrency: int = Field(
        default=4, ge=1, description="In-flight calls allowed per target (bulkhead)"
    )
    timeout_seconds: float = Field(default=10.0, gt=0, description="Per-call HTTP timeout")
    body_format: Literal["raw", "envelope"] = Field(default="raw")
    content_type: str = Field(default="application/octet-stream")
    user_agent: str = Field(default="Webhook-Brain/0.1")
    retryable_status_codes: List[int] = Field(default_factory=lambda: [408, 429])
    bulkhead_requeue_delay_seconds: float = Field(default=1.0, ge=0)


class RetryConfig(BaseModel):
    """Exponential backoff strategy and the retry budget."""

    base_delay_seconds: float = Field(default=10.0, gt=0)
    multiplier: float = Field(default=2.0, ge=1.0)
    jitter_ratio: float = Field(default=0.5, ge=0.0)
    max_single_delay_seconds: float = Field(default=3600.0, gt=0)
    window_seconds: float = Field(default=24 * 3600, gt=0, le=24 * 3600)
    max_attempts: Optional[int] = Field(default=None, ge=1)

    @model_validator(mode="after")
    def check_monotonic(self) -> "RetryConfig":
        if self.jitter_ratio > self.multiplier - 1.0:
            raise ValueError(
                "retry.jitter_ratio must not exceed multiplier - 1 "
                "or consecutive delays could decrease"
            )
        return self


class DeadLetterConfig(BaseModel):
    """Configuration for the dead-letter sink."""

    backend: Literal["memory", "jsonl"] = Field(default="memory")
    path: Optional[str] = Field(default=None, description="File for the jsonl backend")

    @model_validator(mode="after")
    def check_path(self) -> "DeadLetterConfig":
        if self.backend == "jsonl" and not self.path:
            raise ValueError("dead_letter.path is required for the jsonl backend")
        return self


class Config(BaseModel):
    """Main configuration object."""

    model_config = ConfigDict(extra="forbid")

    version: str = Field(default="0.1.0", description="Configuration version")
    server: ServerConfig = Field(default_factory=ServerConfig)
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    fanout: FanoutConfig = Field(default_factory=FanoutConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    ingest: IngestConfig = Field(default_factory=IngestConfig)
    payload_store: PayloadStoreConfig = Field(default_factory=PayloadStoreConfig)
    dispatcher: DispatcherConfig = Field(default_factory=DispatcherConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    dead_letter: DeadLetterConfig = Field(default_factory=DeadLetterConfig)

    @model_validator(mode="after")
    def check_cross_component_limits(self) -> "Config":
        inline_encoded = (self.fanout.inline_threshold_bytes * 4 + 2) // 3
        if inline_encoded + DESCRIPTOR_ENVELOPE_MARGIN_BYTES > self.queue.max_message_bytes:
            raise ValueError(
                "fanout.inline_threshold_bytes leaves no room for the descriptor "
                f"under queue.max_message_bytes ({self.queue.max_message_bytes})"
            )
        if self.dispatcher.timeout_seconds >= self.queue.visibility_timeout_seconds:
            raise ValueError(
                "dispatcher.timeout_seconds must be shorter than queue.visibility_timeout_seconds"
            )
        if self.payload_store.retention_seconds < self.retry.window_seconds:
            raise ValueError("payload_store.retention_seconds must cover retry.window_seconds")
        return self


def load_config(config_path: Optional[Path] = None) -> Config:
    """
    Load configuration from file and environment variables.

    Args:
        config_path: Path to configuration file. If None, looks for
                    WEBHOOK_BRAIN_CONFIG_PATH environment variable.

    Returns:
        Loaded and validated configuration

    Raises:
        FileNotFoundError: If config file specified but not found
        ValueError: If configuration is invalid
    """
    if config_path is None:
        env_path = os.getenv("WEBHOOK_BRAIN_CONFIG_PATH")
        if env_path:
            config_path = Path(env_path)

    config_data: Dict[str, Any] = {}
    if config_path and config_path.exists():
        with open(config_path, "r") as f:
            config_data = json.load(f)
    elif config_path:
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    env_overrides: Dict[str, Any] = {}

    log_level = os.getenv("WEBHOOK_BRAIN_LOG_LEVEL")
    if log_level:
        env_overrides.setdefault("server", {})["log_level"] = log_level

    registry_url = os.getenv("WEBHOOK_BRAIN_REGISTRY_URL")
    if registry_url:
        env_overrides.setdefault("registry", {}).update(source="rest", base_url=registry_url)

    if env_overrides:
        config_data = _deep_merge(config_data, env_overrides)

    return Config(**config_data)


def create_default_config(config_path: Path) -> None:
    """
    Create a default configuration file.

    Args:
        config_path: Path where to create the configuration file
    """
    default_config = {
        "version": "0.1.0",
        "server": {
            "log_level": "INFO",
            "drain_timeout_seconds": 30.0,
            "shutdown_grace_seconds": 10.0,
            "fanout_attempts": 3,
        },
        "registry": {
            "source": "file",
            "path": "registrations.json",
            "api_key": "${WEBHOOK_BRAIN_REGISTRY_API_KEY}",
            "timeout_seconds": 10.0,
            "max_retries": 3,
        },
        "cache": {"refresh_interval_seconds": 30.0},
        "fanout": {"inline_threshold_bytes": 180 * 1024},
        "queue": {
            "backend": "journal",
            "journal_path": "queue.journal",
            "max_message_bytes": 256 * 1024,
            "visibility_timeout_seconds": 60.0,
            "receive_batch_size": 10,
            "poll_interval_seconds": 0.5,
            "max_visible_backlog": 10000,
        },
        "ingest": {"derive_missing_event_ids": False},
        "payload_store": {
            "backend": "filesystem",
            "directory": "payloads",
            "retention_seconds": 48 * 3600,
        },
        "dispatcher": {
            "workers": 16,
            "per_target_concurrency": 4,
            "timeout_seconds": 10.0,
            "body_format": "raw",
            "content_type": "application/octet-stream",
            "retryable_status_codes": [408, 429],
            "bulkhead_requeue_delay_seconds": 1.0,
        },
        "retry": {
            "base_delay_seconds": 10.0,
            "multiplier": 2.0,
            "jitter_ratio": 0.5,
            "max_single_delay_seconds": 3600.0,
            "window_seconds": 24 * 3600,
        },
        "dead_letter": {"backend": "jsonl", "path": "dead-letters.jsonl"},
    }

    config_path.parent.mkdir(parents=True, exist_ok=True)

    with open(config_path, "w") as f:
        json.dump(default_config, f, indent=2)


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """
    Deep merge two dictionaries.

    Args:
        base: Base dictionary
        override: Override dictionary

    Returns:
        Merged dictionary
    """
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value

    return result
