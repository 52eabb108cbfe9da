"""Tests for EngineSettings."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from litestar_flows.config import EngineSettings


@pytest.mark.unit
class TestEngineSettings:
    """Tests for settings defaults and sources."""

    def test_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        for name in ("FLOWS_REDIS_URL", "FLOWS_DATABASE_URL", "FLOWS_LOG_LEVEL"):
            monkeypatch.delenv(name, raising=False)

        settings = EngineSettings(_env_file=None)

        assert settings.redis_url is None
        assert settings.key_prefix == "workflow:state:"
        assert settings.context_ttl == 86400
        assert settings.checkpoint_ttl == 3600
        assert settings.lock_ttl == 30
        assert settings.tracking_limit == 1000
        assert settings.scheduler_batch_size == 10
        assert settings.log_level == "INFO"

    def test_environment_prefix(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test settings are read from FLOWS_ variables."""
        monkeypatch.setenv("FLOWS_REDIS_URL", "redis://cache:6379/2")
        monkeypatch.setenv("FLOWS_CONTEXT_TTL", "120")
        monkeypatch.setenv("FLOWS_LOG_JSON", "true")

        settings = EngineSettings(_env_file=None)

        assert settings.redis_url == "redis://cache:6379/2"
        assert settings.context_ttl == 120
        assert settings.log_json is True

    def test_env_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("FLOWS_LOCK_TTL", raising=False)
        env_file = tmp_path / ".env"
        env_file.write_text("FLOWS_LOCK_TTL=45\nUNRELATED=1\n")

        settings = EngineSettings(_env_file=env_file)

        assert settings.lock_ttl == 45

    def test_log_level_is_normalized(self) -> None:
        assert EngineSettings(_env_file=None, log_level="debug").log_level == "DEBUG"

    def test_invalid_log_level(self) -> None:
        with pytest.raises(ValidationError, match="Invalid log level"):
            EngineSettings(_env_file=None, log_level="chatty")

    @pytest.mark.parametrize("field", ["context_ttl", "lock_ttl", "scheduler_batch_size"])
    def test_positive_values_required(self, field: str) -> None:
        with pytest.raises(ValidationError):
            EngineSettings(_env_file=None, **{field: 0})
