import json
import logging

import pytest

from rxopps.config import Settings
from rxopps.telemetry.logging_config import JSONFormatter
from rxopps.telemetry.run_context import bind_batch_id, get_batch_id, new_batch_id


def _record(msg="hello", **extra):
    record = logging.LogRecord("rxopps.test", logging.INFO, __file__, 1, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    def test_line_carries_batch_id(self):
        with bind_batch_id("scan_1_abcd"):
            line = json.loads(JSONFormatter().format(_record(duration_ms=12.5)))

        assert line["message"] == "hello"
        assert line["level"] == "INFO"
        assert line["logger"] == "rxopps.test"
        assert line["batch_id"] == "scan_1_abcd"
        assert line["duration_ms"] == 12.5

    def test_outside_a_run(self):
        line = json.loads(JSONFormatter().format(_record()))
        assert line["batch_id"] == ""
        assert "duration_ms" not in line


class TestRunContext:
    def test_binding_is_restored(self):
        with bind_batch_id("outer"):
            with bind_batch_id("inner"):
                assert get_batch_id() == "inner"
            assert get_batch_id() == "outer"
        assert get_batch_id() == ""

    def test_new_batch_id_prefix(self):
        first, second = new_batch_id("discovery"), new_batch_id("discovery")
        assert first.startswith("discovery_")
        assert first != second


class TestSettings:
    def test_production_rejects_dev_password(self):
        with pytest.raises(ValueError, match="dev database password"):
            Settings(environment="production")

    def test_production_requires_json_logs(self):
        with pytest.raises(ValueError, match="LOG_FORMAT"):
            Settings(
                environment="production",
                database_url="postgresql+asyncpg://rxopps:s3cret@db:5432/rxopps",
                log_format="text",
            )

    def test_concurrency_floor(self):
        with pytest.raises(ValueError):
            Settings(scan_concurrency=0)
