"""Tests for structured logging, request correlation and health checks."""

import asyncio
import io
import json
import logging

import pytest

from keygate.credentials import Credential
from keygate.errors import StoreIOError
from keygate.health import HealthChecker, HealthStatus, create_store_check
from keygate.observability import (
    JsonFormatter,
    RequestContext,
    TextFormatter,
    configure_logging,
)
from keygate.storage import InMemoryCredentialStore, JsonFileCredentialStore


def make_record(msg="hello %s", args=("world",), **extra):
    record = logging.LogRecord("keygate.test", logging.INFO, __file__, 1, msg, args, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestRequestContext:
    def test_start_and_end(self):
        assert RequestContext.get_request_id() is None
        token = RequestContext.start("req-1")
        assert RequestContext.get_request_id() == "req-1"
        RequestContext.end(token)
        assert RequestContext.get_request_id() is None

    def test_generated_id(self):
        token = RequestContext.start()
        try:
            assert len(RequestContext.get_request_id()) == 32
        finally:
            RequestContext.end(token)


class TestFormatters:
    def test_json_line(self):
        token = RequestContext.start("req-42")
        try:
            line = JsonFormatter().format(make_record(owner="acme"))
        finally:
            RequestContext.end(token)

        entry = json.loads(line)
        assert entry["message"] == "hello world"
        assert entry["level"] == "INFO"
        assert entry["logger"] == "keygate.test"
        assert entry["request_id"] == "req-42"
        assert entry["service"] == "keygate"
        assert entry["attributes"] == {"owner": "acme"}

    def test_text_line(self):
        token = RequestContext.start("req-7")
        try:
            line = TextFormatter().format(make_record())
        finally:
            RequestContext.end(token)
        assert "hello world" in line
        assert line.endswith("[request_id=req-7]")


class TestConfigureLogging:
    @pytest.fixture(autouse=True)
    def restore_logger(self):
        logger = logging.getLogger("keygate")
        saved = (logger.handlers[:], logger.level, logger.propagate)
        yield
        logger.handlers, logger.level, logger.propagate = saved[0], saved[1], saved[2]

    def test_json_output(self):
        stream = io.StringIO()
        configure_logging("DEBUG", "json", stream=stream)
        logging.getLogger("keygate.gate").info("API key used: %s", "sk_abcde...")
        entry = json.loads(stream.getvalue().strip())
        assert entry["logger"] == "keygate.gate"
        assert entry["message"] == "API key used: sk_abcde..."

    def test_level_filters(self):
        stream = io.StringIO()
        configure_logging("WARNING", "text", stream=stream)
        logging.getLogger("keygate.gate").info("quiet")
        logging.getLogger("keygate.gate").warning("loud")
        assert "quiet" not in stream.getvalue()
        assert "loud" in stream.getvalue()


class BrokenStore(InMemoryCredentialStore):
    def _read(self):
        raise StoreIOError(cause=OSError("disk gone"))


class TestHealth:
    def test_store_healthy(self):
        checker = HealthChecker()
        checker.register_check("credential_store", create_store_check(InMemoryCredentialStore([Credential("a", 1)])))
        results = asyncio.run(checker.run_all_checks())

        assert results["credential_store"].status == HealthStatus.HEALTHY
        assert results["credential_store"].details["credentials"] == 1
        assert checker.get_overall_status() == HealthStatus.HEALTHY

    def test_store_unreadable(self):
        checker = HealthChecker()
        checker.register_check("credential_store", create_store_check(BrokenStore()))
        asyncio.run(checker.run_all_checks())

        assert checker.get_overall_status() == HealthStatus.UNHEALTHY
        summary = checker.get_summary()
        assert summary["status"] == "unhealthy"
        assert summary["checks"]["credential_store"]["status"] == "unhealthy"

    def test_corrupt_store_unhealthy_even_when_degrading(self, tmp_path):
        path = tmp_path / "api-keys.json"
        path.write_text("garbage")
        store = JsonFileCredentialStore(str(path), on_read_error="empty")
        checker = HealthChecker()
        checker.register_check("credential_store", create_store_check(store))
        results = asyncio.run(checker.run_all_checks())

        assert store.load() == []
        assert results["credential_store"].status == HealthStatus.UNHEALTHY
        assert results["credential_store"].details == {"error": "StoreCorruptError"}

    def test_unknown_check(self):
        result = asyncio.run(HealthChecker().run_check("nope"))
        assert result.status == HealthStatus.UNKNOWN

    def test_no_checks_is_unknown(self):
        assert HealthChecker().get_overall_status() == HealthStatus.UNKNOWN
