"""
Tests for settings and structured logging.
"""
import logging

import pytest
from pydantic import ValidationError

from parcelflow.core.config import Settings
from parcelflow.core.structured_logging import (
    STRUCTURED_FORMAT,
    StructuredFormatter,
    configure_logging,
    filter_sensitive_fields,
    get_correlation_id,
    get_job_id,
    get_run_id,
    get_stage,
    with_correlation_id,
    with_run_context,
    with_stage_context,
)


class TestSettings:

    def test_defaults(self):
        settings = Settings(_env_file=None)
        assert settings.scheduler_interval_seconds == 60.0
        assert settings.metrics_mode == "full"
        assert settings.quality_min_records == 5

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("PARCELFLOW_DISPATCHER_WORKERS", "8")
        monkeypatch.setenv("PARCELFLOW_SCHEDULER_ENABLED", "false")
        settings = Settings(_env_file=None)
        assert settings.dispatcher_workers == 8
        assert settings.scheduler_enabled is False

    def test_unknown_metrics_mode_falls_back(self):
        assert Settings(_env_file=None, metrics_mode="verbose").metrics_mode == "basic"

    def test_rejects_invalid_values(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, dispatcher_workers=0)


class TestContext:

    def test_correlation_id_scoped(self):
        assert get_correlation_id() is None
        with with_correlation_id("req-42") as cid:
            assert cid == "req-42"
            assert get_correlation_id() == "req-42"
        assert get_correlation_id() is None

    def test_generated_correlation_id(self):
        with with_correlation_id() as cid:
            assert cid
            assert get_correlation_id() == cid

    def test_run_and_stage_context(self):
        with with_run_context("job_1", "run_1"):
            with with_stage_context("extract"):
                assert get_job_id() == "job_1"
                assert get_run_id() == "run_1"
                assert get_correlation_id() == "run_1"
                assert get_stage() == "extract"
            assert get_stage() is None
        assert get_run_id() is None

    def test_formatter_includes_context(self):
        formatter = StructuredFormatter(STRUCTURED_FORMAT)
        record = logging.LogRecord("parcelflow.test", logging.INFO, __file__, 1, "hello", None, None)

        with with_run_context("job_1", "run_1"), with_stage_context("load"):
            line = formatter.format(record)

        assert "[job:job_1]" in line
        assert "[run:run_1]" in line
        assert "[stage:load]" in line
        assert line.endswith("hello")

    def test_formatter_without_context(self):
        formatter = StructuredFormatter(STRUCTURED_FORMAT)
        record = logging.LogRecord("parcelflow.test", logging.INFO, __file__, 1, "idle", None, None)
        assert "[corr:-]" in formatter.format(record)


class TestConfigureLogging:

    @pytest.fixture
    def parcelflow_logger(self):
        logger = logging.getLogger("parcelflow")
        handlers, level = logger.handlers[:], logger.level
        logger.handlers.clear()
        yield logger
        logger.handlers[:] = handlers
        logger.setLevel(level)

    def test_installs_structured_handler_once(self, parcelflow_logger):
        logger = configure_logging("debug")
        assert logger is parcelflow_logger
        assert logger.level == logging.DEBUG
        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0].formatter, StructuredFormatter)

        configure_logging("warning")
        assert len(logger.handlers) == 1
        assert logger.level == logging.WARNING

    def test_unknown_level_falls_back_to_info(self, parcelflow_logger):
        assert configure_logging("chatty").level == logging.INFO


class TestSensitiveFields:

    def test_redacts_nested(self):
        data = {
            "url": "postgresql://db/parcels",
            "api_key": "abc",
            "headers": {"Authorization": "Bearer x", "Accept": "application/json"},
        }
        filtered = filter_sensitive_fields(data)
        assert filtered["url"] == data["url"]
        assert filtered["api_key"] == "***REDACTED***"
        assert filtered["headers"]["Authorization"] == "***REDACTED***"
        assert filtered["headers"]["Accept"] == "application/json"
        assert data["api_key"] == "abc"
