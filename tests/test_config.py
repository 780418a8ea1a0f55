# tests/test_config.py
"""Tests for stageflow/config.py and engine-level overrides."""
from __future__ import annotations

import pytest
from pydantic import ValidationError

from stageflow.config import Settings
from stageflow.core.engine import Middleware, MiddlewareOutcome, StageEngine
from stageflow.core.engine.errors import InvalidConfigurationError, TransitionCancelledError


class TestSettings:
    def test_defaults(self, monkeypatch):
        for name in ("LOG_LEVEL", "LOG_JSON", "HISTORY_LIMIT", "REJECT_CANCELLED_TRANSITIONS", "LOG_TRANSITIONS",
                     "CONFIG_WARNINGS"):
            monkeypatch.delenv(f"STAGEFLOW_{name}", raising=False)
        settings = Settings(_env_file=None)
        assert settings.log_level == "INFO"
        assert settings.log_json is False
        assert settings.log_transitions is True
        assert settings.history_limit == 100
        assert settings.reject_cancelled_transitions is False
        assert settings.config_warnings is True

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("STAGEFLOW_HISTORY_LIMIT", "5")
        monkeypatch.setenv("STAGEFLOW_REJECT_CANCELLED_TRANSITIONS", "true")
        monkeypatch.setenv("STAGEFLOW_LOG_LEVEL", "DEBUG")
        settings = Settings(_env_file=None)
        assert settings.history_limit == 5
        assert settings.reject_cancelled_transitions is True
        assert settings.log_level == "DEBUG"

    def test_invalid_values(self, monkeypatch):
        monkeypatch.setenv("STAGEFLOW_HISTORY_LIMIT", "0")
        with pytest.raises(ValidationError):
            Settings(_env_file=None)

    def test_unknown_env_ignored(self, monkeypatch):
        monkeypatch.setenv("STAGEFLOW_SOMETHING_ELSE", "1")
        Settings(_env_file=None)


class TestEngineOverrides:
    @pytest.mark.asyncio
    async def test_settings_policy_applies(self, fetch_config, monkeypatch):
        monkeypatch.setattr("stageflow.core.engine.engine.settings.reject_cancelled_transitions", True)
        engine = StageEngine(fetch_config)
        engine.add_middleware(Middleware("gate", lambda ctx: MiddlewareOutcome.cancel()))
        await engine.start()
        with pytest.raises(TransitionCancelledError):
            await engine.send("fetch")

    @pytest.mark.asyncio
    async def test_keyword_wins_over_settings(self, fetch_config, monkeypatch):
        monkeypatch.setattr("stageflow.core.engine.engine.settings.reject_cancelled_transitions", True)
        engine = StageEngine(fetch_config, reject_cancelled_transitions=False)
        engine.add_middleware(Middleware("gate", lambda ctx: MiddlewareOutcome.cancel()))
        await engine.start()
        result = await engine.send("fetch")
        assert result.cancelled

    def test_history_limit_from_settings(self, fetch_config, monkeypatch):
        monkeypatch.setattr("stageflow.core.engine.engine.settings.history_limit", 7)
        engine = StageEngine(fetch_config)
        assert engine._history.maxlen == 7

    def test_explicit_history_limit_wins(self, fetch_config, monkeypatch):
        monkeypatch.setattr("stageflow.core.engine.engine.settings.history_limit", 7)
        engine = StageEngine(fetch_config, history_limit=1)
        assert engine._history.maxlen == 1

    @pytest.mark.parametrize("limit", [0, -3])
    def test_history_limit_below_one_rejected(self, fetch_config, limit):
        with pytest.raises(InvalidConfigurationError) as exc_info:
            StageEngine(fetch_config, history_limit=limit)
        assert exc_info.value.context["history_limit"] == limit
