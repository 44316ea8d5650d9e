"""Tests for the structured logging system (billing_kernel/logging_config.py)."""

import json
import logging
from datetime import date
from decimal import Decimal
from io import StringIO
from uuid import uuid4

import pytest

from billing_kernel.exceptions import AlreadyCompletedError
from billing_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
    reset_logging,
)


@pytest.fixture(autouse=True)
def _clean_logging():
    """Reset logging state between tests."""
    reset_logging()
    LogContext.clear()
    yield
    LogContext.clear()
    reset_logging()


def _make_handler() -> tuple[logging.Handler, StringIO]:
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    return handler, stream


def _parse_log(stream: StringIO) -> dict:
    """Parse the first JSON log line from a stream."""
    line = stream.getvalue().strip().split("\n")[0]
    return json.loads(line)


def _parse_all_logs(stream: StringIO) -> list[dict]:
    """Parse all JSON log lines from a stream."""
    lines = stream.getvalue().strip().split("\n")
    return [json.loads(line) for line in lines if line]


# ---------------------------------------------------------------------------
# StructuredFormatter tests
# ---------------------------------------------------------------------------


class TestStructuredFormatter:
    """Tests for JSON log output format."""

    def test_basic_json_output(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        logger.info("hello")

        record = _parse_log(stream)
        assert record["level"] == "INFO"
        assert record["message"] == "hello"
        assert record["logger"] == "billing_kernel.test"
        assert "ts" in record

    def test_extra_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        logger.info("invoice_issued", extra={"item_count": 2, "status": "issued"})

        record = _parse_log(stream)
        assert record["item_count"] == 2
        assert record["status"] == "issued"

    def test_context_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        LogContext.set(case_id="CASE-001", node_id="N1")
        logger.info("test_msg")

        record = _parse_log(stream)
        assert record["case_id"] == "CASE-001"
        assert record["node_id"] == "N1"

    def test_exception_fields(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        try:
            raise ValueError("boom")
        except ValueError:
            logger.error("failed", exc_info=True)

        record = _parse_log(stream)
        assert record["exc_type"] == "ValueError"
        assert record["exc_message"] == "boom"
        assert "traceback" in record

    def test_billing_exception_code_extracted(self):
        """Billing kernel exceptions carry .code attribute."""
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")

        try:
            raise AlreadyCompletedError("N1", date(2024, 2, 1))
        except AlreadyCompletedError:
            logger.error("completion_error", exc_info=True)

        record = _parse_log(stream)
        assert record["exc_code"] == "ALREADY_COMPLETED"
        assert record["exc_type"] == "AlreadyCompletedError"
        assert record["exc_node_id"] == "N1"
        assert record["exc_completion_date"] == "2024-02-01"

    def test_no_context_fields_when_empty(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        logger.info("bare_message")

        record = _parse_log(stream)
        assert "case_id" not in record
        assert "node_id" not in record

    def test_uuid_decimal_and_date_serialized(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        uid = uuid4()
        logger.info("typed", extra={
            "invoice_uuid": uid,
            "amount": Decimal("1000.00"),
            "due_date": date(2024, 3, 1),
            "node_ids": ("N1", "N2"),
        })

        record = _parse_log(stream)
        assert record["invoice_uuid"] == str(uid)
        assert record["amount"] == "1000.00"
        assert record["due_date"] == "2024-03-01"
        assert record["node_ids"] == ["N1", "N2"]

    def test_valid_json_every_line(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler, level=logging.DEBUG)
        logger = get_logger("test")
        for i in range(5):
            logger.debug("line", extra={"i": i})

        records = _parse_all_logs(stream)
        assert [r["i"] for r in records] == [0, 1, 2, 3, 4]


# ---------------------------------------------------------------------------
# LogContext tests
# ---------------------------------------------------------------------------


class TestLogContext:
    """Tests for request-scoped context fields."""

    def test_set_and_get(self):
        LogContext.set(case_id="CASE-001")
        assert LogContext.get_all() == {"case_id": "CASE-001"}

    def test_clear(self):
        LogContext.set(case_id="CASE-001", actor_id="LAWYER-001")
        LogContext.clear()
        assert LogContext.get_all() == {}

    def test_bind_context_manager(self):
        with LogContext.bind(node_id="N1"):
            assert LogContext.get_all()["node_id"] == "N1"
        assert "node_id" not in LogContext.get_all()

    def test_bind_restores_previous(self):
        LogContext.set(case_id="OUTER")
        with LogContext.bind(case_id="INNER"):
            assert LogContext.get_all()["case_id"] == "INNER"
        assert LogContext.get_all()["case_id"] == "OUTER"

    def test_bind_skips_none(self):
        with LogContext.bind(node_id="N1", actor_id=None):
            assert "actor_id" not in LogContext.get_all()

    def test_additive_set(self):
        LogContext.set(case_id="CASE-001")
        LogContext.set(node_id="N1")
        assert LogContext.get_all() == {"case_id": "CASE-001", "node_id": "N1"}


# ---------------------------------------------------------------------------
# configure_logging tests
# ---------------------------------------------------------------------------


class TestConfigureLogging:
    """Tests for logger initialisation."""

    def test_idempotent(self):
        handler, _ = _make_handler()
        configure_logging(handler=handler)
        configure_logging(handler=handler)

        assert len(logging.getLogger("billing_kernel").handlers) == 1

    def test_get_logger_returns_child(self):
        assert get_logger("engines.fees").name == "billing_kernel.engines.fees"

    def test_logger_hierarchy(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("modules.stage_billing.service").info("child_message")

        record = _parse_log(stream)
        assert record["logger"] == "billing_kernel.modules.stage_billing.service"

    def test_does_not_propagate(self):
        configure_logging(handler=logging.NullHandler())

        assert logging.getLogger("billing_kernel").propagate is False
