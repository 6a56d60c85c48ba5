"""Tests for configuration and logging setup."""

import json
import logging
import os

import pytest

from bpm_engine.config import (
    AppConfig,
    LogLevel,
    UnknownRulePolicy,
    get_config,
    get_development_config,
    get_production_config,
    get_testing_config,
    load_config,
    reset_config,
    validate_config,
)
from bpm_engine.core.exceptions import ConfigurationError
from bpm_engine.core.logging import StructuredFormatter, WorkflowContextFilter, simulation_extra
from bpm_engine.models.core import SimulationStatus
from bpm_engine.factory import create_app


@pytest.fixture(autouse=True)
def fresh_config():
    """Reset the process configuration around every test."""
    reset_config()
    yield
    reset_config()


class TestAppConfig:
    """Test cases for AppConfig."""

    def test_defaults(self):
        config = AppConfig()

        assert config.app_name == "BPM Workflow Engine"
        assert config.simulation_max_steps == 1000
        assert config.max_expression_length == 500
        assert config.unknown_rule_policy == UnknownRulePolicy.FAIL_OPEN
        assert config.register_default_rules is True
        assert config.log_level == LogLevel.INFO

    def test_invalid_port(self):
        with pytest.raises(ValueError):
            AppConfig(port=70000)

    def test_invalid_limits(self):
        with pytest.raises(ValueError):
            AppConfig(simulation_max_steps=0)
        with pytest.raises(ValueError):
            AppConfig(max_expression_length=0)

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("BPM_ENGINE_SIMULATION_MAX_STEPS", "25")
        monkeypatch.setenv("BPM_ENGINE_UNKNOWN_RULE_POLICY", "fail_closed")
        monkeypatch.setenv("BPM_ENGINE_DEBUG", "true")
        monkeypatch.setenv("BPM_ENGINE_LOG_LEVEL", "debug")
        monkeypatch.setenv("BPM_ENGINE_CORS_ORIGINS", "http://a.test,http://b.test")

        config = AppConfig.from_env()

        assert config.simulation_max_steps == 25
        assert config.unknown_rule_policy == UnknownRulePolicy.FAIL_CLOSED
        assert config.debug is True
        assert config.log_level == LogLevel.DEBUG
        assert config.cors_origins == ["http://a.test", "http://b.test"]

    @pytest.mark.parametrize("key, value", [
        ("SIMULATION_MAX_STEPS", "many"),
        ("UNKNOWN_RULE_POLICY", "ignore"),
        ("LOG_LEVEL", "loud"),
    ])
    def test_from_env_rejects_unconvertible_values(self, monkeypatch, key, value):
        monkeypatch.setenv(f"BPM_ENGINE_{key}", value)

        with pytest.raises(ConfigurationError) as exc_info:
            AppConfig.from_env()

        assert exc_info.value.config_key == key
        assert exc_info.value.context == {"config_key": key}

    def test_get_config_is_cached(self):
        assert get_config() is get_config()

    def test_load_config_reads_env_file(self, tmp_path):
        env_file = tmp_path / "settings.env"
        env_file.write_text("BPM_ENGINE_MAX_SIMULATION_SESSIONS=7\n")

        try:
            config = load_config(str(env_file))
            assert config.max_simulation_sessions == 7
            assert get_config() is config
        finally:
            os.environ.pop("BPM_ENGINE_MAX_SIMULATION_SESSIONS", None)

    def test_uvicorn_config(self):
        config = AppConfig(port=9000, log_level=LogLevel.WARNING)
        assert config.get_uvicorn_config() == {
            "host": "0.0.0.0",
            "port": 9000,
            "reload": False,
            "log_level": "warning",
            "access_log": False
        }

    def test_presets(self):
        assert get_development_config().log_level == LogLevel.DEBUG
        assert get_production_config().log_structured is True
        assert get_production_config().is_production is True

        testing = get_testing_config()
        assert testing.simulation_max_steps == 50
        assert testing.max_simulation_sessions == 5


class TestValidateConfig:
    """Test cases for cross-field configuration checks."""

    def test_valid_config(self):
        validate_config(AppConfig())

    def test_script_limit_below_expression_limit(self):
        config = AppConfig(max_expression_length=100, max_script_length=50)
        with pytest.raises(ConfigurationError, match="max_script_length") as exc_info:
            validate_config(config)
        assert exc_info.value.problems == ["max_script_length must not be smaller than max_expression_length"]

    def test_step_budget_too_large(self):
        with pytest.raises(ConfigurationError, match="simulation_max_steps"):
            validate_config(AppConfig(simulation_max_steps=2_000_000))

    def test_log_directory_is_created(self, tmp_path):
        log_file = tmp_path / "logs" / "engine.log"
        validate_config(AppConfig(log_file=str(log_file)))
        assert log_file.parent.is_dir()

    def test_all_problems_are_reported(self):
        config = AppConfig(max_expression_length=100, max_script_length=50, simulation_max_steps=2_000_000)

        with pytest.raises(ConfigurationError) as exc_info:
            validate_config(config)

        assert len(exc_info.value.problems) == 2
        assert exc_info.value.details["problems"] == exc_info.value.problems

    def test_create_app_refuses_invalid_config(self):
        with pytest.raises(ConfigurationError):
            create_app(AppConfig(simulation_max_steps=2_000_000))


class TestLogging:
    """Test cases for structured logging helpers."""

    def make_record(self, message="hello"):
        return logging.LogRecord("bpm_engine.core.test", logging.INFO, __file__, 10, message, None, None)

    def test_structured_formatter(self):
        record = self.make_record()
        record.extra_fields = {"session_id": "s1", "status": "running", "request_id": "r1"}

        entry = json.loads(StructuredFormatter().format(record))

        assert entry["message"] == "hello"
        assert entry["level"] == "INFO"
        assert entry["logger"] == "bpm_engine.core.test"
        assert entry["simulation"] == {"session_id": "s1", "status": "running"}
        assert entry["request_id"] == "r1"
        assert "session_id" not in entry

    def test_structured_formatter_without_simulation_fields(self):
        entry = json.loads(StructuredFormatter().format(self.make_record()))
        assert "simulation" not in entry

    def test_simulation_extra(self):
        extra = simulation_extra(session_id="s1", node_id=None, status=SimulationStatus.HALTED, step_count=3)
        assert extra == {"extra_fields": {"session_id": "s1", "status": "halted", "step_count": 3}}

    def test_context_filter(self):
        context_filter = WorkflowContextFilter()
        context_filter.set_context(request_id="r1")

        record = self.make_record()
        assert context_filter.filter(record) is True
        assert record.extra_fields == {"request_id": "r1"}

        context_filter.clear_context()
        record = self.make_record()
        context_filter.filter(record)
        assert record.extra_fields == {}

    def test_explicit_fields_win_over_context(self):
        context_filter = WorkflowContextFilter()
        context_filter.set_context(request_id="r1", session_id="ambient")

        record = self.make_record()
        record.extra_fields = {"session_id": "s2"}
        context_filter.filter(record)

        assert record.extra_fields == {"request_id": "r1", "session_id": "s2"}
        assert context_filter.context == {"request_id": "r1", "session_id": "ambient"}
