"""
Unit tests for configuration loading and validation.
"""

import json

import pytest
from pydantic import ValidationError

from webhook_brain.config.settings import (
    Config,
    DispatcherConfig,
    FanoutConfig,
    QueueConfig,
    RegistryConfig,
    RetryConfig,
    create_default_config,
    load_config,
)


class TestConfigDefaults:
    """Test default configuration."""

    def test_defaults_are_consistent(self):
        """Test that the default configuration passes cross-field validation."""
        config = Config()
        assert config.queue.max_message_bytes == 256 * 1024
        assert config.retry.window_seconds == 24 * 3600
        assert config.dispatcher.retryable_status_codes == [408, 429]
        assert config.payload_store.retention_seconds >= config.retry.window_seconds

    def test_unknown_section_rejected(self):
        """Test that unknown top-level keys are rejected."""
        with pytest.raises(ValidationError):
            Config(webhooks={"enabled": True})

    def test_log_level_normalized(self):
        """Test log level validation."""
        config = Config(server={"log_level": "debug"})
        assert config.server.log_level == "DEBUG"

        with pytest.raises(ValidationError):
            Config(server={"log_level": "verbose"})


class TestCrossFieldValidation:
    """Test validation across components."""

    def test_inline_threshold_must_fit_queue(self):
        """Test that an inline threshold too large for the queue is rejected."""
        with pytest.raises(ValidationError, match="inline_threshold_bytes"):
            Config(
                fanout=FanoutConfig(inline_threshold_bytes=250 * 1024),
                queue=QueueConfig(max_message_bytes=256 * 1024),
            )

    def test_timeout_must_be_below_visibility(self):
        """Test that an HTTP timeout outliving the lease is rejected."""
        with pytest.raises(ValidationError, match="visibility_timeout"):
            Config(
                dispatcher=DispatcherConfig(timeout_seconds=90),
                queue=QueueConfig(visibility_timeout_seconds=60),
            )

    def test_retention_must_cover_window(self):
        """Test that payload retention shorter than the retry window is rejected."""
        with pytest.raises(ValidationError, match="retention_seconds"):
            Config(payload_store={"retention_seconds": 3600})

    def test_window_capped_at_24_hours(self):
        """Test the retry window ceiling."""
        with pytest.raises(ValidationError):
            RetryConfig(window_seconds=25 * 3600)

    def test_jitter_bounded_by_multiplier(self):
        """Test that jitter which could break monotonic backoff is rejected."""
        with pytest.raises(ValidationError, match="jitter_ratio"):
            RetryConfig(multiplier=1.5, jitter_ratio=0.8)

        assert RetryConfig(multiplier=1.5, jitter_ratio=0.5).jitter_ratio == 0.5

    def test_rest_registry_requires_base_url(self):
        """Test registry source validation."""
        with pytest.raises(ValidationError, match="base_url"):
            RegistryConfig(source="rest")

    def test_journal_queue_requires_path(self):
        """Test that the journaled queue needs a journal file."""
        with pytest.raises(ValidationError, match="journal_path"):
            QueueConfig(backend="journal")
        assert QueueConfig(backend="journal", journal_path="q.journal").fsync is False


class TestLoadConfig:
    """Test loading configuration from files and environment."""

    def test_missing_explicit_file(self, tmp_path):
        """Test that an explicit missing path raises."""
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "missing.json")

    def test_round_trip_default_file(self, tmp_path, monkeypatch):
        """Test that the generated default file loads."""
        monkeypatch.delenv("WEBHOOK_BRAIN_REGISTRY_URL", raising=False)
        monkeypatch.delenv("WEBHOOK_BRAIN_LOG_LEVEL", raising=False)
        path = tmp_path / "config.json"
        create_default_config(path)

        config = load_config(path)

        assert config.payload_store.backend == "filesystem"
        assert config.dead_letter.backend == "jsonl"
        assert config.registry.path == "registrations.json"
        assert config.queue.backend == "journal"
        assert config.queue.journal_path == "queue.journal"
        assert config.ingest.derive_missing_event_ids is False

    def test_environment_overrides(self, tmp_path, monkeypatch):
        """Test environment variable overrides."""
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"server": {"log_level": "INFO"}}))
        monkeypatch.setenv("WEBHOOK_BRAIN_LOG_LEVEL", "warning")
        monkeypatch.setenv("WEBHOOK_BRAIN_REGISTRY_URL", "https://registry.example.com")
        monkeypatch.setenv("WEBHOOK_BRAIN_REGISTRY_API_KEY", "secret")

        config = load_config(path)

        assert config.server.log_level == "WARNING"
        assert config.registry.source == "rest"
        assert config.registry.base_url == "https://registry.example.com"
        assert config.registry.api_key == "secret"

    def test_config_path_from_environment(self, tmp_path, monkeypatch):
        """Test WEBHOOK_BRAIN_CONFIG_PATH lookup."""
        path = tmp_path / "engine.json"
        path.write_text(json.dumps({"dispatcher": {"workers": 3}}))
        monkeypatch.setenv("WEBHOOK_BRAIN_CONFIG_PATH", str(path))
        monkeypatch.delenv("WEBHOOK_BRAIN_REGISTRY_URL", raising=False)

        assert load_config().dispatcher.workers == 3
