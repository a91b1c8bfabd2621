"""Tests for settings parsing and engine configuration bounds."""

import pytest
from pydantic import ValidationError

from mastery_engine.config import Settings
from mastery_engine.models import EngineConfig


class TestSettings:
    def test_defaults(self):
        s = Settings(_env_file=None)
        config = s.engine_config()
        assert config.daily_goal == 20
        assert config.mastery_threshold == 3
        assert config.level_weights == {0: 3, 1: 2, 2: 1, 3: 0}

    def test_level_weights_from_json(self):
        s = Settings(_env_file=None, level_weights='{"0": 5, "1": 1}')
        assert s.level_weights == {0: 5, 1: 1}

    def test_level_weights_from_env(self, monkeypatch):
        monkeypatch.setenv("LEVEL_WEIGHTS", '{"0": 4, "2": 1}')
        monkeypatch.setenv("DAILY_GOAL", "30")
        s = Settings(_env_file=None)
        assert s.level_weights == {0: 4, 2: 1}
        assert s.engine_config().daily_goal == 30


class TestEngineConfig:
    def test_threshold_above_max_level(self):
        with pytest.raises(ValidationError):
            EngineConfig(mastery_threshold=4, max_level=3)

    def test_weight_for_unknown_level(self):
        with pytest.raises(ValidationError):
            EngineConfig(level_weights={5: 1})

    def test_negative_weight(self):
        with pytest.raises(ValidationError):
            EngineConfig(level_weights={0: -1})

    def test_default_session_larger_than_max(self):
        with pytest.raises(ValidationError):
            EngineConfig(default_session_questions=50, max_session_questions=10)

    def test_daily_goal_must_be_positive(self):
        with pytest.raises(ValidationError):
            EngineConfig(daily_goal=0)
