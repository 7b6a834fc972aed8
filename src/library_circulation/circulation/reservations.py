"""
Reservation queue manager.

Each book has a FIFO queue of PENDING reservations ordered by
``reserved_at``. When a copy is freed the head of the queue is promoted to
AVAILABLE and the copy is earmarked for it by claiming it from the ledger,
so nobody else can check it out during the pickup hold. Fulfilment turns
the earmarked copy into a loan; cancellation or expiry of a hold returns the
copy and promotes the next reservation.

``queue_position`` is derived, never trusted: every change to a book's
PENDING set renumbers the queue 1..N inside the same transaction.
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import CirculationConfig
from ..database.circulation_repository import ReservationRepository
from ..database.schema import Reservation as ReservationRow
from ..database.schema import ReservationStatusEnum
from ..errors import CirculationError, invalid_transition, not_found, policy_violation
from ..models.circulation import ActingUser, Loan, Reservation
from ..observability import record_circulation_event, trace_operation
from .base import CirculationComponent, Clock, append_note, new_id
from .ledger import ResourceLedger
from .loans import LoanManager
from .locks import BookLockRegistry
from .providers import NotificationProvider, dispatch
from .retry import retry_on_conflict

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (ReservationStatusEnum.PENDING, ReservationStatusEnum.AVAILABLE)


class ReservationQueueManager(CirculationComponent):
    """Maintains per-book reservation queues and pickup holds."""

    component = "reservations"

    def __init__(
        self,
        session: Session,
        config: CirculationConfig,
        locks: BookLockRegistry,
        ledger: ResourceLedger,
        loans: LoanManager,
        notifier: NotificationProvider | None = None,
        clock: Clock | None = None,
    ):
        super().__init__(session, config, locks, clock)
        self.ledger = ledger
        self.loan_manager = loans
        self.notifier = notifier
        self.reservations = ReservationRepository(session)

    # === Helpers ===

    def _require(self, reservation_id: str) -> ReservationRow:
        reservation = self.reservations.get_row(reservation_id)
        if reservation is None:
            raise not_found("Reservation", reservation_id)
        return reservation

    def _renumber(self, book_id: str) -> int:
        """Assign positions 1..N to the book's PENDING reservations in FIFO order."""
        self.session.flush()
        queue = self.reservations.pending_queue(book_id)
        for position, reservation in enumerate(queue, start=1):
            if reservation.queue_position != position:
                reservation.queue_position = position
        return len(queue)

    # === Operations ===

    @retry_on_conflict
    def create_reservation(
        self, user_id: str, book_id: str, notes: str | None = None
    ) -> Reservation:
        """
        Join the queue for a book that has no free copy.

        Raises:
            CirculationError: NOT_FOUND for unknown books, POLICY_VIOLATION when
                a copy is free, the user already borrowed or reserved the book,
                or the user's reservation cap is reached
        """
        with self._operation(book_id, "create_reservation", user_id=user_id, book_id=book_id):
            book = self.ledger.require_book(book_id)
            if not book.active:
                raise policy_violation(
                    f"Book {book_id} is not available for circulation", "book_inactive"
                )
            if book.available_copies > 0:
                raise policy_violation(
                    f"'{book.title}' has {book.available_copies} available copies; "
                    "check it out directly",
                    "copy_available",
                )
            if self.loan_manager.loans.find_active(user_id, book_id) is not None:
                raise policy_violation(
                    f"User {user_id} already has this book on loan", "already_borrowed"
                )
            if self.reservations.find_active(user_id, book_id) is not None:
                raise policy_violation(
                    f"User {user_id} already has an active reservation for book {book_id}",
                    "duplicate_active_reservation",
                )
            active = self.reservations.count_active_for_user(user_id)
            if active >= self.config.max_active_reservations:
                raise policy_violation(
                    f"User {user_id} has reached the limit of "
                    f"{self.config.max_active_reservations} active reservations",
                    "reservation_limit_reached",
                )

            reservation = ReservationRow(
                id=new_id("reservation"),
                user_id=user_id,
                book_id=book_id,
                status=ReservationStatusEnum.PENDING,
                reserved_at=self.now(),
                queue_position=self.reservations.count_pending(book_id) + 1,
                notification_sent=False,
                notes=notes,
            )
            try:
                self.reservations.add(reservation)
            except IntegrityError as e:
                raise policy_violation(
                    f"User {user_id} already has an active reservation for book {book_id}",
                    "duplicate_active_reservation",
                ) from e
            self._renumber(book_id)
            self._commit("create_reservation")

        record_circulation_event("reservation", book_id)
        logger.info(
            "Reservation %s: %s queued for %s at position %d",
            reservation.id,
            user_id,
            book_id,
            reservation.queue_position,
        )
        return self.reservations.to_model(reservation)

    @retry_on_conflict
    def cancel_reservation(
        self, reservation_id: str, acting_user: ActingUser | str
    ) -> Reservation:
        """
        Cancel a pending reservation or an open hold.

        Only the owner or an administrator may cancel. Cancelling a hold gives
        its earmarked copy back and promotes the next reservation.
        """
        if isinstance(acting_user, str):
            acting_user = ActingUser(user_id=acting_user)
        book_id = self._require(reservation_id).book_id

        with self._operation(book_id, "cancel_reservation", reservation_id=reservation_id):
            reservation = self._require(reservation_id)
            if not acting_user.is_admin and acting_user.user_id != reservation.user_id:
                raise policy_violation(
                    f"User {acting_user.user_id} cannot cancel reservation {reservation_id}",
                    "not_reservation_owner",
                )
            if reservation.status not in ACTIVE_STATUSES:
                raise invalid_transition(
                    f"Reservation {reservation_id} cannot be cancelled "
                    f"(status: {reservation.status.value})",
                    "reservation_not_active",
                )

            held = reservation.status == ReservationStatusEnum.AVAILABLE
            reservation.status = ReservationStatusEnum.CANCELLED
            reservation.cancelled_at = self.now()
            reservation.queue_position = None
            if held:
                self.ledger.release(book_id)
            self._renumber(book_id)
            self._commit("cancel_reservation")
            result = self.reservations.to_model(reservation)

            if held:
                self._promote_after_release(book_id)

        record_circulation_event("reservation_cancelled", book_id)
        logger.info("Reservation %s cancelled by %s", reservation_id, acting_user.user_id)
        return result

    @retry_on_conflict
    def promote_next(self, book_id: str) -> Reservation | None:
        """
        Promote the head of the book's queue to AVAILABLE and earmark a copy for it.

        A no-op returning None when the queue is empty or no copy can be
        claimed. The promotion is committed before the user is notified, and
        a failed notification leaves it in place.
        """
        with self._operation(book_id, "promote_next", book_id=book_id) as span:
            head = self.reservations.head_of_queue(book_id)
            if head is None or not self.ledger.try_claim(book_id):
                span.set_attribute("promotion.promoted", False)
                return None

            now = self.now()
            head.status = ReservationStatusEnum.AVAILABLE
            head.available_at = now
            head.available_until = now + timedelta(hours=self.config.hold_period_hours)
            head.queue_position = None
            self._renumber(book_id)
            title = self.ledger.require_book(book_id).title
            self._commit("promote_next")
            span.set_attribute("promotion.promoted", True)
            promoted = self.reservations.to_model(head)

        record_circulation_event("reservation_promoted", book_id)
        logger.info(
            "Reservation %s promoted; hold open until %s", promoted.id, promoted.available_until
        )

        if dispatch(
            self.notifier,
            "notify_available",
            user_id=promoted.user_id,
            book_title=title,
            available_until=promoted.available_until,
        ):
            try:
                self._mark_notified(promoted.id, book_id)
                promoted = promoted.model_copy(update={"notification_sent": True})
            except CirculationError:
                logger.warning("Could not record notification for reservation %s", promoted.id)
        return promoted

    def _promote_after_release(self, book_id: str) -> Reservation | None:
        """Promote once a released copy is committed; the release stands even if this fails."""
        try:
            return self.promote_next(book_id)
        except CirculationError:
            logger.exception("Promotion for book %s failed", book_id)
            return None

    @retry_on_conflict
    def _mark_notified(self, reservation_id: str, book_id: str) -> None:
        with self._operation(book_id, "mark_notified", reservation_id=reservation_id):
            reservation = self._require(reservation_id)
            reservation.notification_sent = True
            self._commit("mark_notified")

    @retry_on_conflict
    def fulfill_reservation(self, reservation_id: str, notes: str | None = None) -> Loan:
        """
        Turn an open hold into a loan on the earmarked copy.

        The loan rules are applied to the reservation's user as for a direct
        checkout. If any rule fails, the reservation stays AVAILABLE and the
        error propagates.
        """
        book_id = self._require(reservation_id).book_id

        with self._operation(book_id, "fulfill_reservation", reservation_id=reservation_id):
            reservation = self._require(reservation_id)
            if reservation.status != ReservationStatusEnum.AVAILABLE:
                raise invalid_transition(
                    f"Reservation {reservation_id} is not available for pickup "
                    f"(status: {reservation.status.value})",
                    "reservation_not_available",
                )
            now = self.now()
            if reservation.available_until is not None and reservation.available_until < now:
                raise invalid_transition(
                    f"The hold for reservation {reservation_id} expired at "
                    f"{reservation.available_until}",
                    "hold_expired",
                )

            loan = self.loan_manager.open_loan(
                reservation.user_id, book_id, claim=False, reservation_id=reservation.id
            )
            reservation.status = ReservationStatusEnum.FULFILLED
            reservation.fulfilled_at = now
            reservation.notes = append_note(reservation.notes, "Pickup", notes)
            self._commit("fulfill_reservation")

        record_circulation_event("reservation_fulfilled", book_id)
        logger.info("Reservation %s fulfilled as loan %s", reservation_id, loan.id)
        return self.loan_manager.loans.to_model(loan)

    def expire_old_reservations(self) -> int:
        """
        Expire holds whose pickup deadline has passed.

        Each expired hold returns its copy and promotes the next reservation
        for the book. Books left with a free copy and a waiting queue are
        then promoted as well.

        Returns:
            Number of reservations expired
        """
        now = self.now()
        expired = 0
        with trace_operation(self.component, "expire_old_reservations") as span:
            self.session.expire_all()
            candidates = [(r.id, r.book_id) for r in self.reservations.expired_holds(now)]
            for reservation_id, book_id in candidates:
                if self._expire_one(reservation_id, book_id, now):
                    expired += 1
            promoted = self.promote_waiting()
            span.set_attribute("expiry.expired", expired)
            span.set_attribute("expiry.promoted", promoted)

        if expired:
            logger.info("Expired %d reservation hold(s)", expired)
        return expired

    @retry_on_conflict
    def _expire_one(self, reservation_id: str, book_id: str, now: datetime) -> bool:
        with self._operation(book_id, "expire_reservation", reservation_id=reservation_id):
            reservation = self._require(reservation_id)
            if (
                reservation.status != ReservationStatusEnum.AVAILABLE
                or reservation.available_until is None
                or reservation.available_until >= now
            ):
                return False

            reservation.status = ReservationStatusEnum.EXPIRED
            reservation.cancelled_at = now
            reservation.queue_position = None
            self.ledger.release(book_id)
            self._renumber(book_id)
            self._commit("expire_reservation")

            self._promote_after_release(book_id)

        record_circulation_event("reservation_expired", book_id)
        logger.info("Reservation %s expired", reservation_id)
        return True

    def promote_waiting(self) -> int:
        """Promote queues of books that have a free copy, e.g. after copies were added."""
        self.session.expire_all()
        promoted = 0
        for book_id in self.reservations.books_with_waiting_queue():
            while self.promote_next(book_id) is not None:
                promoted += 1
        return promoted

    @retry_on_conflict
    def update_queue_positions(self, book_id: str) -> int:
        """Renumber the book's PENDING reservations 1..N; returns N."""
        with self._operation(book_id, "update_queue_positions", book_id=book_id):
            self.ledger.require_book(book_id)
            size = self._renumber(book_id)
            self._commit("update_queue_positions")
        return size

    # === Queries ===

    def get_reservation(self, reservation_id: str) -> Reservation:
        return self.reservations.to_model(self._require(reservation_id))

    def get_queue(self, book_id: str) -> list[Reservation]:
        """PENDING reservations of a book in promotion order."""
        self.ledger.require_book(book_id)
        return [self.reservations.to_model(r) for r in self.reservations.pending_queue(book_id)]

    def queue_position(self, reservation_id: str) -> int:
        """1-based position while PENDING, 0 otherwise."""
        reservation = self._require(reservation_id)
        if reservation.status != ReservationStatusEnum.PENDING:
            return 0
        return reservation.queue_position or 0

    def reservations_for_user(self, user_id: str, active_only: bool = False) -> list[Reservation]:
        return [
            self.reservations.to_model(r)
            for r in self.reservations.for_user(user_id, active_only=active_only)
        ]
