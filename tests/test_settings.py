"""Tests for environment-backed engine settings."""

import pytest
from pydantic import ValidationError

from tributary.config.settings import EngineSettings
from tributary.execution.script import ScriptLimits


class TestEngineSettings:

    def test_defaults(self, settings):
        assert settings.script_timeout_seconds == 3.0
        assert settings.script_max_depth == 100
        assert settings.combine_source_policy == "fail"
        assert settings.run_timeout_seconds is None
        assert settings.max_workers == 4

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("TRIBUTARY_COMBINE_SOURCE_POLICY", "null")
        monkeypatch.setenv("TRIBUTARY_MAX_WORKERS", "2")
        monkeypatch.setenv("TRIBUTARY_RUN_TIMEOUT_SECONDS", "1.5")
        settings = EngineSettings(_env_file=None)
        assert settings.combine_source_policy == "null"
        assert settings.max_workers == 2
        assert settings.run_timeout_seconds == 1.5

    def test_unknown_policy_rejected(self):
        with pytest.raises(ValidationError):
            EngineSettings(_env_file=None, combine_source_policy="skip")

    @pytest.mark.parametrize("field,value", [
        ("script_timeout_seconds", 0),
        ("script_max_depth", 500),
        ("max_workers", 0),
    ])
    def test_bounds(self, field, value):
        with pytest.raises(ValidationError):
            EngineSettings(_env_file=None, **{field: value})

    def test_script_limits_from_settings(self):
        settings = EngineSettings(_env_file=None, script_max_steps=50, script_max_depth=20)
        limits = ScriptLimits.from_settings(settings)
        assert limits.max_steps == 50
        assert limits.max_depth == 20
        assert limits.timeout_seconds == settings.script_timeout_seconds
