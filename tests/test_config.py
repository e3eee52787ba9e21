"""Tests for run configuration."""

from __future__ import annotations

from pathlib import Path

import pytest

from vmstack.config import (
    DEFAULT_MAX_PARALLEL_OPERATIONS,
    DEFAULT_MAX_PROVIDER_ATTEMPTS,
    Config,
    ConfigurationError,
    SessionContext,
)


class TestConfigValidation:
    """Tests for Config.__post_init__ validation."""

    def test_valid_config(self) -> None:
        """Test a minimal valid configuration."""
        config = Config(project_id="my-project-123", region="us-central1")
        assert config.max_parallel_operations == DEFAULT_MAX_PARALLEL_OPERATIONS
        assert config.max_provider_attempts == DEFAULT_MAX_PROVIDER_ATTEMPTS
        assert config.stack_file == Path("stack.yaml")
        assert config.dry_run is False

    def test_missing_project(self) -> None:
        """Test project id is required."""
        with pytest.raises(ConfigurationError, match="GCP_PROJECT is required"):
            Config(project_id="", region="us-central1")

    def test_invalid_project(self) -> None:
        """Test project id format is enforced."""
        with pytest.raises(ConfigurationError, match="valid project id"):
            Config(project_id="My_Project", region="us-central1")

    def test_invalid_region(self) -> None:
        """Test region format is enforced."""
        with pytest.raises(ConfigurationError, match="valid GCP region"):
            Config(project_id="my-project-123", region="us-central1-a")

    def test_parallel_bounds(self) -> None:
        """Test parallelism must be within bounds."""
        with pytest.raises(ConfigurationError, match="MAX_PARALLEL_OPERATIONS"):
            Config(project_id="my-project-123", region="us-central1", max_parallel_operations=0)
        with pytest.raises(ConfigurationError, match="MAX_PARALLEL_OPERATIONS"):
            Config(project_id="my-project-123", region="us-central1", max_parallel_operations=33)

    def test_all_errors_reported(self) -> None:
        """Test every problem is listed in one error."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(project_id="", region="", max_provider_attempts=0)
        message = str(exc_info.value)
        assert "GCP_PROJECT" in message
        assert "GCP_REGION" in message
        assert "MAX_PROVIDER_ATTEMPTS" in message

    def test_session(self) -> None:
        """Test the session context mirrors project and region."""
        config = Config(project_id="my-project-123", region="europe-west4")
        assert config.session == SessionContext(project_id="my-project-123", region="europe-west4")


class TestConfigFromEnv:
    """Tests for Config.from_env."""

    def test_reads_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test values are read from environment variables."""
        monkeypatch.setenv("GCP_PROJECT", "my-project-123")
        monkeypatch.setenv("GCP_REGION", "us-east1")
        monkeypatch.setenv("STACK_FILE", "/tmp/web.yaml")
        monkeypatch.setenv("MAX_PARALLEL_OPERATIONS", "8")
        monkeypatch.setenv("RETRY_BACKOFF_BASE_SECONDS", "0.5")
        monkeypatch.setenv("DRY_RUN", "true")

        config = Config.from_env()

        assert config.project_id == "my-project-123"
        assert config.region == "us-east1"
        assert config.stack_file == Path("/tmp/web.yaml")
        assert config.max_parallel_operations == 8
        assert config.retry_backoff_base_seconds == 0.5
        assert config.dry_run is True

    def test_non_integer(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test a malformed integer is a configuration error."""
        monkeypatch.setenv("GCP_PROJECT", "my-project-123")
        monkeypatch.setenv("GCP_REGION", "us-east1")
        monkeypatch.setenv("MAX_PROVIDER_ATTEMPTS", "lots")

        with pytest.raises(ConfigurationError, match="must be an integer"):
            Config.from_env()

    def test_missing_required(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test missing project and region fail fast."""
        monkeypatch.delenv("GCP_PROJECT", raising=False)
        monkeypatch.delenv("GCP_REGION", raising=False)

        with pytest.raises(ConfigurationError):
            Config.from_env()
