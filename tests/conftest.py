"""Test configuration and fixtures for the library circulation engine.

Every test gets:
1. An isolated SQLite database file under ``tmp_path``
2. A circulation config pointing at that database
3. A controllable clock, so due dates and hold deadlines are deterministic
4. A recording notifier, so notices can be asserted without delivery
"""

import os
from collections.abc import Generator, Iterator
from contextlib import contextmanager
from datetime import date, datetime, timedelta
from decimal import Decimal
from pathlib import Path

import logfire
import pytest
from sqlalchemy.orm import Session

from library_circulation.circulation import BookLockRegistry, CirculationEngine
from library_circulation.config import CirculationConfig, reset_config
from library_circulation.database.schema import Subscription
from library_circulation.database.session import DatabaseManager

# === Pytest Configuration ===


def pytest_configure(config):
    """Register markers and keep logfire local during tests."""
    config.addinivalue_line("markers", "concurrency: test exercises concurrent workers")
    logfire.configure(send_to_logfire=False, console=False)


# === Test Doubles ===


class FakeClock:
    """A clock the test moves by hand."""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta) -> datetime:
        self.current = self.current + timedelta(**delta)
        return self.current

    def today(self) -> date:
        return self.current.date()


class RecordingNotifier:
    """Collects notices instead of delivering them; ``fail`` makes every call raise."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: list[tuple[str, dict]] = []

    def _record(self, kind: str, **kwargs) -> None:
        if self.fail:
            raise RuntimeError("notification channel down")
        self.sent.append((kind, kwargs))

    def notify_available(self, user_id, book_title, available_until):
        self._record(
            "available", user_id=user_id, book_title=book_title, available_until=available_until
        )

    def notify_overdue(self, user_id, book_title, overdue_days, fine_amount):
        self._record(
            "overdue",
            user_id=user_id,
            book_title=book_title,
            overdue_days=overdue_days,
            fine_amount=fine_amount,
        )

    def notify_due_soon(self, user_id, book_title, due_date):
        self._record("due_soon", user_id=user_id, book_title=book_title, due_date=due_date)

    def of_kind(self, kind: str) -> list[dict]:
        return [payload for sent_kind, payload in self.sent if sent_kind == kind]


# === Database Fixtures ===


@pytest.fixture
def test_db_path(tmp_path: Path) -> Path:
    """Each test gets its own database file."""
    return tmp_path / "test_circulation.db"


@pytest.fixture
def db_manager(test_db_path: Path) -> Generator[DatabaseManager, None, None]:
    manager = DatabaseManager(f"sqlite:///{test_db_path}")
    manager.init_database()
    yield manager
    manager.close()


@pytest.fixture
def test_db_session(db_manager: DatabaseManager) -> Generator[Session, None, None]:
    session = db_manager.create_session()
    try:
        yield session
    finally:
        session.close()


# === Configuration Fixtures ===


@pytest.fixture
def test_config(test_db_path: Path) -> Generator[CirculationConfig, None, None]:
    """Circulation policy used throughout the tests.

    A daily rate of 1.00 capped at 50.00, no grace period, 48 hour holds and
    two renewals per loan.
    """
    reset_config()
    config = CirculationConfig(
        server_name="test-library-circulation",
        database_path=test_db_path,
        fine_per_day=Decimal("1.00"),
        max_fine=Decimal("50.00"),
        grace_period_days=0,
        lost_book_penalty=Decimal("100.00"),
        damaged_book_penalty=Decimal("25.00"),
        default_max_renewals=2,
        default_renewal_days=14,
        hold_period_hours=48,
        max_active_reservations=3,
        scheduler_enabled=False,
        debug=True,
        log_level="DEBUG",
    )
    yield config
    reset_config()


@pytest.fixture
def clean_env() -> Generator[None, None, None]:
    """Run without any LIBRARY_CIRCULATION_* variables."""
    original_env = os.environ.copy()
    for key in list(os.environ.keys()):
        if key.startswith("LIBRARY_CIRCULATION_"):
            del os.environ[key]
    yield
    os.environ.clear()
    os.environ.update(original_env)


# === Engine Fixtures ===


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 3, 1, 10, 0, 0))


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def failing_notifier() -> RecordingNotifier:
    return RecordingNotifier(fail=True)


@pytest.fixture
def lock_registry() -> BookLockRegistry:
    return BookLockRegistry()


@pytest.fixture
def make_engine(test_config, clock, notifier, lock_registry):
    """Build an engine around any session, sharing the test's clock, notifier and locks."""

    def factory(session: Session, **overrides) -> CirculationEngine:
        kwargs = {
            "locks": lock_registry,
            "clock": clock,
            "notifier": notifier,
        }
        kwargs.update(overrides)
        return CirculationEngine(session, test_config, **kwargs)

    return factory


@pytest.fixture
def engine(make_engine, test_db_session) -> CirculationEngine:
    return make_engine(test_db_session)


@pytest.fixture
def engine_factory(make_engine, db_manager):
    """Drop-in replacement for ``engine_scope``: a fresh session per unit of work."""

    @contextmanager
    def scope() -> Iterator[CirculationEngine]:
        session = db_manager.create_session()
        try:
            yield make_engine(session)
        finally:
            session.close()

    return scope


# === Test Data Fixtures ===


@pytest.fixture
def subscribe(test_db_session, clock):
    """Give a user an active subscription starting a year before the test clock."""

    def add(
        user_id: str,
        max_books: int = 5,
        max_days: int = 14,
        plan_name: str = "standard",
        active: bool = True,
        end_date: date | None = None,
    ) -> Subscription:
        subscription = Subscription(
            id=f"subscription_{user_id}",
            user_id=user_id,
            plan_name=plan_name,
            max_books_allowed=max_books,
            max_days_per_book=max_days,
            active=active,
            start_date=clock.today() - timedelta(days=365),
            end_date=end_date,
        )
        test_db_session.add(subscription)
        test_db_session.commit()
        return subscription

    return add


@pytest.fixture
def add_book(engine):
    """Register a book with the ledger."""

    def add(book_id: str = "book_test001", copies: int = 1, **kwargs):
        return engine.ledger.add_book(
            book_id, kwargs.pop("title", f"Title of {book_id}"), total_copies=copies, **kwargs
        )

    return add


@pytest.fixture
def users(subscribe) -> list[str]:
    """Three subscribed users."""
    user_ids = ["user_x", "user_y", "user_z"]
    for user_id in user_ids:
        subscribe(user_id)
    return user_ids
