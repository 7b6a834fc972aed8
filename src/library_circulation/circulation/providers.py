"""
External collaborators of the circulation engine.

The engine only needs two things from the outside world: the borrowing
limits of a user and a way to tell users about holds and overdue loans.
Both are protocols with a database-backed default implementation.
"""

import logging
from collections.abc import Callable
from datetime import date, datetime
from decimal import Decimal
from typing import Protocol, runtime_checkable

from sqlalchemy import or_, select
from sqlalchemy.orm import Session, sessionmaker

from ..database.schema import Notification, Subscription
from ..database.session import safe_commit, safe_query
from ..models.entitlement import Entitlement
from .base import Clock, new_id

logger = logging.getLogger(__name__)


@runtime_checkable
class EntitlementProvider(Protocol):
    def get_active_entitlement(self, user_id: str) -> Entitlement | None:
        """Limits of the user's active subscription, or None without one."""
        ...


@runtime_checkable
class NotificationProvider(Protocol):
    def notify_available(
        self, user_id: str, book_title: str, available_until: datetime
    ) -> None: ...

    def notify_overdue(
        self, user_id: str, book_title: str, overdue_days: int, fine_amount: Decimal
    ) -> None: ...

    def notify_due_soon(self, user_id: str, book_title: str, due_date: date) -> None: ...


class SubscriptionEntitlementProvider:
    """Reads entitlements from the ``subscriptions`` table."""

    def __init__(self, session: Session, clock: Clock | None = None):
        self.session = session
        self.clock = clock or datetime.now

    def get_active_entitlement(self, user_id: str) -> Entitlement | None:
        today = self.clock().date()
        query = (
            select(Subscription)
            .where(
                Subscription.user_id == user_id,
                Subscription.active.is_(True),
                Subscription.start_date <= today,
                or_(Subscription.end_date.is_(None), Subscription.end_date >= today),
            )
            .order_by(Subscription.start_date.desc())
            .limit(1)
        )
        subscription = safe_query(
            self.session,
            lambda s: s.execute(query).scalar_one_or_none(),
            "Failed to load active subscription",
        )
        if subscription is None:
            return None
        return Entitlement.model_validate(subscription)


class LoggingNotifier:
    """Writes notices to the log; the default when no delivery channel is configured."""

    def notify_available(self, user_id: str, book_title: str, available_until: datetime) -> None:
        logger.info(
            "Notify %s: '%s' is ready for pickup until %s", user_id, book_title, available_until
        )

    def notify_overdue(
        self, user_id: str, book_title: str, overdue_days: int, fine_amount: Decimal
    ) -> None:
        logger.info(
            "Notify %s: '%s' is %d day(s) overdue, fine %s",
            user_id,
            book_title,
            overdue_days,
            fine_amount,
        )

    def notify_due_soon(self, user_id: str, book_title: str, due_date: date) -> None:
        logger.info("Notify %s: '%s' is due on %s", user_id, book_title, due_date)


class DatabaseNotifier:
    """
    Persists in-app notifications to the ``notifications`` table.

    Each notice is written in its own session so a delivery failure can never
    touch the circulation transaction that triggered it.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def _store(self, user_id: str, kind: str, title: str, message: str) -> None:
        session = self.session_factory()
        try:
            session.add(
                Notification(
                    id=new_id("notification"),
                    user_id=user_id,
                    kind=kind,
                    title=title,
                    message=message,
                )
            )
            safe_commit(session, f"notify_{kind}")
        finally:
            session.close()

    def notify_available(self, user_id: str, book_title: str, available_until: datetime) -> None:
        self._store(
            user_id,
            "reservation_available",
            "Your reserved book is available",
            f"'{book_title}' is ready for pickup. Please collect it before "
            f"{available_until:%Y-%m-%d %H:%M}.",
        )

    def notify_overdue(
        self, user_id: str, book_title: str, overdue_days: int, fine_amount: Decimal
    ) -> None:
        self._store(
            user_id,
            "overdue",
            "Book overdue",
            f"'{book_title}' is {overdue_days} day(s) overdue. Current fine: {fine_amount}.",
        )

    def notify_due_soon(self, user_id: str, book_title: str, due_date: date) -> None:
        self._store(
            user_id,
            "due_reminder",
            "Book due soon",
            f"'{book_title}' is due on {due_date:%Y-%m-%d}.",
        )


def build_notifier(channel: str, session: Session) -> NotificationProvider:
    """Notifier for the configured channel; database notices go to the session's database."""
    if channel == "logging":
        return LoggingNotifier()
    if channel == "database":
        return DatabaseNotifier(sessionmaker(bind=session.get_bind(), expire_on_commit=False))
    raise ValueError(f"Unknown notification channel: {channel}")


def dispatch(notifier: NotificationProvider | None, method: str, **kwargs) -> bool:
    """
    Deliver one notice, fire-and-forget.

    The triggering state change is already committed when this runs; a
    failing notifier is logged and reported as False, never raised.
    """
    if notifier is None:
        return False
    try:
        getattr(notifier, method)(**kwargs)
    except Exception:
        logger.exception("Notification %s to %s failed", method, kwargs.get("user_id"))
        return False
    return True
