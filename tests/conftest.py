"""
Pytest fixtures for the back-office engine test suite.

Provides:
- Structured logging configured once per session, plus ``captured_logs``
- A file-backed SQLite database per test (sessions from different threads
  must not share one in-memory connection)
- A DeterministicClock with naive UTC values (SQLite stores naive datetimes)
- Factories for recurring expense templates
"""

import json
import logging
from datetime import date, datetime
from decimal import Decimal
from io import StringIO
from uuid import uuid4

import pytest

# Model modules register their tables on import
import backoffice_batch.models  # noqa: F401
from backoffice_batch.models.expense import ExpenseModel
from backoffice_kernel.db.engine import (
    create_engine,
    create_session_factory,
    create_tables,
    transaction_scope,
)
from backoffice_kernel.domain.clock import DeterministicClock
from backoffice_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)


# Test actor ID for all test operations
TEST_ACTOR_ID = uuid4()


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG, stream=StringIO())
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
    Capture backoffice logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, generator):
            generator.process_due()
            logs = captured_logs()
            assert any(r["message"] == "recurring_run_completed" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("backoffice")
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
# Database fixtures
# =============================================================================


@pytest.fixture
def db_engine(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'backoffice.db'}")
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture
def clock():
    return DeterministicClock(datetime(2024, 3, 15, 2, 0, 0))


@pytest.fixture
def actor_id():
    return TEST_ACTOR_ID


# =============================================================================
# Expense templates
# =============================================================================


@pytest.fixture
def make_template(session_factory):
    """Insert a recurring expense template and return its id."""

    def _make(
        next_occurrence: date | None = date(2024, 3, 1),
        frequency: str | None = "monthly",
        start_date: date | None = None,
        end_date: date | None = None,
        status: str = "approved",
        description: str = "Office rent",
        amount: Decimal = Decimal("1200.00"),
        is_recurring: bool = True,
        parent_expense_id=None,
        **fields,
    ):
        template_id = uuid4()
        with transaction_scope(session_factory) as session:
            session.add(ExpenseModel(
                id=template_id,
                user_id="user-1",
                category="rent",
                description=description,
                amount=amount,
                currency="EUR",
                expense_date=start_date or next_occurrence or date(2024, 1, 1),
                status=status,
                is_recurring=is_recurring,
                recurrence_frequency=frequency,
                recurrence_start_date=start_date or next_occurrence,
                recurrence_end_date=end_date,
                next_occurrence=next_occurrence,
                parent_expense_id=parent_expense_id,
                created_by_id=TEST_ACTOR_ID,
                **fields,
            ))
        return template_id

    return _make
