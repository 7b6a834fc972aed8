"""Tests for the entitlement and notification providers."""

from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from library_circulation.circulation import BookLockRegistry, CirculationEngine
from library_circulation.circulation.providers import (
    DatabaseNotifier,
    EntitlementProvider,
    LoggingNotifier,
    NotificationProvider,
    SubscriptionEntitlementProvider,
    build_notifier,
    dispatch,
)
from library_circulation.database.schema import Notification, Subscription


class TestSubscriptionEntitlementProvider:
    def test_active_subscription(self, test_db_session, subscribe, clock):
        subscribe("user_reader", max_books=3, max_days=21, plan_name="standard")
        provider = SubscriptionEntitlementProvider(test_db_session, clock)

        entitlement = provider.get_active_entitlement("user_reader")

        assert isinstance(provider, EntitlementProvider)
        assert entitlement.user_id == "user_reader"
        assert entitlement.plan_name == "standard"
        assert entitlement.max_books_allowed == 3
        assert entitlement.max_days_per_book == 21

    def test_no_subscription(self, test_db_session, clock):
        provider = SubscriptionEntitlementProvider(test_db_session, clock)
        assert provider.get_active_entitlement("user_nobody") is None

    def test_inactive_and_future_subscriptions_ignored(self, test_db_session, clock):
        today = clock.today()
        test_db_session.add_all(
            [
                Subscription(
                    id="subscription_old",
                    user_id="user_mixed",
                    plan_name="basic",
                    max_books_allowed=2,
                    max_days_per_book=14,
                    active=False,
                    start_date=today - timedelta(days=100),
                ),
                Subscription(
                    id="subscription_future",
                    user_id="user_mixed",
                    plan_name="premium",
                    max_books_allowed=10,
                    max_days_per_book=30,
                    active=True,
                    start_date=today + timedelta(days=10),
                ),
            ]
        )
        test_db_session.commit()
        provider = SubscriptionEntitlementProvider(test_db_session, clock)

        assert provider.get_active_entitlement("user_mixed") is None

    def test_latest_subscription_wins(self, test_db_session, clock):
        today = clock.today()
        for n, (plan, start) in enumerate([("basic", 300), ("premium", 30)]):
            test_db_session.add(
                Subscription(
                    id=f"subscription_upgrade{n}",
                    user_id="user_upgrade",
                    plan_name=plan,
                    max_books_allowed=2 if plan == "basic" else 10,
                    max_days_per_book=14,
                    active=True,
                    start_date=today - timedelta(days=start),
                )
            )
        test_db_session.commit()

        entitlement = SubscriptionEntitlementProvider(
            test_db_session, clock
        ).get_active_entitlement("user_upgrade")

        assert entitlement.plan_name == "premium"


class TestNotifiers:
    def test_database_notifier_stores_notices(self, db_manager, test_db_session):
        notifier = DatabaseNotifier(db_manager.create_session)

        notifier.notify_available("user_a", "Dune", datetime(2024, 3, 3, 10, 0))
        notifier.notify_overdue("user_a", "Dune", 2, Decimal("2.00"))
        notifier.notify_due_soon("user_b", "Emma", date(2024, 3, 5))

        rows = test_db_session.execute(select(Notification)).scalars().all()
        assert isinstance(notifier, NotificationProvider)
        assert sorted(row.kind for row in rows) == [
            "due_reminder",
            "overdue",
            "reservation_available",
        ]
        available = next(row for row in rows if row.kind == "reservation_available")
        assert available.user_id == "user_a"
        assert "2024-03-03 10:00" in available.message
        assert all(row.read is False for row in rows)

    def test_logging_notifier(self, caplog):
        caplog.set_level("INFO")

        LoggingNotifier().notify_due_soon("user_a", "Emma", date(2024, 3, 5))

        assert "'Emma' is due on 2024-03-05" in caplog.text

    def test_dispatch_swallows_delivery_failures(self, failing_notifier, caplog):
        sent = dispatch(
            failing_notifier,
            "notify_due_soon",
            user_id="user_a",
            book_title="Emma",
            due_date=date(2024, 3, 5),
        )

        assert sent is False
        assert "Notification notify_due_soon to user_a failed" in caplog.text

    def test_dispatch_without_notifier(self):
        assert dispatch(None, "notify_due_soon", user_id="user_a") is False

    def test_dispatch_success(self, notifier):
        assert dispatch(
            notifier, "notify_due_soon", user_id="u", book_title="t", due_date=date(2024, 1, 1)
        )
        assert notifier.of_kind("due_soon") == [
            {"user_id": "u", "book_title": "t", "due_date": date(2024, 1, 1)}
        ]


class TestNotifierSelection:
    def test_channels(self, test_db_session):
        assert isinstance(build_notifier("logging", test_db_session), LoggingNotifier)
        assert isinstance(build_notifier("database", test_db_session), DatabaseNotifier)

    def test_unknown_channel(self, test_db_session):
        with pytest.raises(ValueError, match="Unknown notification channel"):
            build_notifier("pigeon", test_db_session)

    def test_engine_stores_notices_by_default(
        self, make_engine, test_db_session, add_book, users, test_config
    ):
        assert test_config.notification_channel == "database"
        engine = make_engine(test_db_session, notifier=None)
        add_book("book_notice", title="Middlemarch")
        engine.checkout(users[0], "book_notice", requested_days=2)

        assert engine.send_due_date_reminders() == 1

        rows = test_db_session.execute(select(Notification)).scalars().all()
        assert [(row.user_id, row.kind) for row in rows] == [(users[0], "due_reminder")]
        assert "'Middlemarch' is due on 2024-03-03" in rows[0].message

    def test_logging_channel(self, test_db_session, test_config):
        config = test_config.model_copy(update={"notification_channel": "logging"})
        engine = CirculationEngine(test_db_session, config, locks=BookLockRegistry())

        assert isinstance(engine.notifier, LoggingNotifier)
