"""
Pytest fixtures for the stage billing test suite.

Provides:
- Structured logging setup and log capture
- In-memory SQLite sessions with all stage billing tables created
- The CN-2024 compliance rule set
- A deterministic clock
- SQL-backed collaborators and a wired StageBillingService
"""

import json
import logging
from datetime import datetime, timezone
from io import StringIO

import pytest

from billing_config import get_active_rules
from billing_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_session,
    init_engine_from_url,
    reset_engine,
)
from billing_kernel.domain.clock import DeterministicClock
from billing_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from billing_modules.stage_billing.service import StageBillingService
from billing_modules.stage_billing.store import SqlCaseStore, SqlInvoiceIssuer
from tests.factories import RecordingNotificationSink, make_case

# Deterministic "now" for every test: 2024-03-01 09:00 UTC
TEST_NOW = datetime(2024, 3, 1, 9, 0, 0, tzinfo=timezone.utc)


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture billing_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, service):
            service.complete_billing_milestone(...)
            logs = captured_logs()
            assert any(r["message"] == "milestone_completed" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("billing_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Rules and clock
# =============================================================================


@pytest.fixture(scope="session")
def rules():
    """The CN-2024 compliance rule set shipped with the package."""
    return get_active_rules("CN-2024")


@pytest.fixture
def clock():
    return DeterministicClock(TEST_NOW)


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def session():
    """A session on a fresh in-memory SQLite database."""
    init_engine_from_url("sqlite:///:memory:")
    create_tables()
    session = get_session()
    yield session
    session.close()
    drop_tables()
    reset_engine()


@pytest.fixture
def case_store(session):
    return SqlCaseStore(session)


@pytest.fixture
def invoice_issuer(session, clock):
    return SqlInvoiceIssuer(session, clock)


@pytest.fixture
def notification_sink():
    return RecordingNotificationSink()


@pytest.fixture
def test_case(case_store):
    """CASE-001 in the intake phase, opened 2024-01-02."""
    return case_store.add_case(make_case())


@pytest.fixture
def service(case_store, invoice_issuer, rules, notification_sink, clock):
    return StageBillingService(
        case_store=case_store,
        invoice_issuer=invoice_issuer,
        rules=rules,
        notification_sink=notification_sink,
        clock=clock,
    )
