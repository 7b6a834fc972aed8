"""
Tests for the loan manager.

These tests cover:
1. Checkout rules and the order they are checked in
2. Check-in as returned, lost or damaged, including late returns
3. Renewal limits and overdue loans
4. The overdue sweep and due date reminders
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from library_circulation.circulation import FineCalculator
from library_circulation.errors import CirculationError, ErrorKind
from library_circulation.models.circulation import CheckinCondition, LoanStatus, ReservationStatus
from library_circulation.models.fine import FineStatus, FineType


def assert_circulation_error(exc_info, kind: ErrorKind, reason: str | None = None) -> None:
    assert exc_info.value.kind == kind
    if reason is not None:
        assert exc_info.value.reason == reason


class TestCheckout:
    def test_single_copy_scenario(self, engine, add_book, users):
        """One copy: the first borrower gets it, the second can only queue."""
        user_x, user_y, _ = users
        add_book("book_single", copies=1)

        loan = engine.checkout(user_x, "book_single")

        assert loan.status == LoanStatus.CHECKED_OUT
        assert loan.user_id == user_x
        assert engine.ledger.availability("book_single") == 0

        with pytest.raises(CirculationError) as exc_info:
            engine.checkout(user_y, "book_single")
        assert_circulation_error(exc_info, ErrorKind.RESOURCE_UNAVAILABLE, "no_copy_available")

        reservation = engine.create_reservation(user_y, "book_single")
        assert reservation.status == ReservationStatus.PENDING
        assert reservation.queue_position == 1

    def test_due_date_uses_plan_maximum(self, engine, add_book, subscribe, clock):
        subscribe("user_plan", max_days=21)
        add_book("book_plan")

        loan = engine.checkout("user_plan", "book_plan")

        assert loan.checkout_date == clock.today()
        assert loan.due_date == clock.today() + timedelta(days=21)
        assert loan.max_renewals == 2
        assert loan.renewal_count == 0

    def test_requested_days_are_capped_by_plan(self, engine, add_book, subscribe, clock):
        subscribe("user_cap", max_days=14)
        add_book("book_cap_a")
        add_book("book_cap_b")

        short = engine.checkout("user_cap", "book_cap_a", requested_days=7)
        long = engine.checkout("user_cap", "book_cap_b", requested_days=60)

        assert short.due_date == clock.today() + timedelta(days=7)
        assert long.due_date == clock.today() + timedelta(days=14)

    def test_non_positive_loan_period_rejected(self, engine, add_book, users):
        add_book("book_period")

        with pytest.raises(CirculationError) as exc_info:
            engine.checkout(users[0], "book_period", requested_days=0)

        assert_circulation_error(exc_info, ErrorKind.POLICY_VIOLATION, "invalid_loan_period")
        assert engine.ledger.availability("book_period") == 1

    def test_user_without_subscription(self, engine, add_book):
        add_book("book_nosub")

        with pytest.raises(CirculationError) as exc_info:
            engine.checkout("user_nobody", "book_nosub")

        assert_circulation_error(exc_info, ErrorKind.ENTITLEMENT_MISSING, "no_active_subscription")

    def test_lapsed_subscription(self, engine, add_book, subscribe, clock):
        subscribe("user_lapsed", end_date=clock.today() - timedelta(days=1))
        add_book("book_lapsed")

        with pytest.raises(CirculationError) as exc_info:
            engine.checkout("user_lapsed", "book_lapsed")

        assert_circulation_error(exc_info, ErrorKind.ENTITLEMENT_MISSING)

    def test_entitlement_is_checked_before_the_book(self, engine):
        with pytest.raises(CirculationError) as exc_info:
            engine.checkout("user_nobody", "book_missing")

        assert_circulation_error(exc_info, ErrorKind.ENTITLEMENT_MISSING)

    def test_unknown_book(self, engine, users):
        with pytest.raises(CirculationError) as exc_info:
            engine.checkout(users[0], "book_missing")

        assert_circulation_error(exc_info, ErrorKind.NOT_FOUND, "book_not_found")

    def test_inactive_book(self, engine, add_book, users):
        add_book("book_withdrawn", active=False)

        with pytest.raises(CirculationError) as exc_info:
            engine.checkout(users[0], "book_withdrawn")

        assert_circulation_error(exc_info, ErrorKind.POLICY_VIOLATION, "book_inactive")

    def test_duplicate_active_loan(self, engine, add_book, users):
        add_book("book_dup", copies=2)
        engine.checkout(users[0], "book_dup")

        with pytest.raises(CirculationError) as exc_info:
            engine.checkout(users[0], "book_dup")

        assert_circulation_error(exc_info, ErrorKind.POLICY_VIOLATION, "duplicate_active_loan")
        assert engine.ledger.availability("book_dup") == 1

    def test_loan_limit_reported_before_availability(self, engine, add_book, subscribe, users):
        subscribe("user_basic", max_books=1)
        add_book("book_limit_a")
        add_book("book_limit_b")
        engine.checkout("user_basic", "book_limit_a")
        engine.checkout(users[0], "book_limit_b")

        with pytest.raises(CirculationError) as exc_info:
            engine.checkout("user_basic", "book_limit_b")

        assert_circulation_error(exc_info, ErrorKind.POLICY_VIOLATION, "loan_limit_reached")

    def test_overdue_loans_block_new_checkouts(self, engine, add_book, users, clock):
        add_book("book_late")
        add_book("book_next")
        engine.checkout(users[0], "book_late", requested_days=7)
        clock.advance(days=10)

        with pytest.raises(CirculationError) as exc_info:
            engine.checkout(users[0], "book_next")

        assert_circulation_error(exc_info, ErrorKind.POLICY_VIOLATION, "overdue_loans_outstanding")
        assert engine.ledger.availability("book_next") == 1


class TestCheckin:
    def test_on_time_return_releases_copy(self, engine, add_book, users, clock):
        add_book("book_return")
        loan = engine.checkout(users[0], "book_return")
        clock.advance(days=3)

        returned = engine.checkin(loan.id)

        assert returned.status == LoanStatus.RETURNED
        assert returned.return_date == clock.today()
        assert returned.overdue_days == 0
        assert engine.ledger.availability("book_return") == 1
        assert engine.fines.fines_for_loan(loan.id) == []

    def test_late_return_records_fine(self, engine, add_book, users, clock, notifier):
        """Due five days ago and returned today: five days at the daily rate."""
        add_book("book_overdue", title="Late Book")
        loan = engine.checkout(users[0], "book_overdue", requested_days=14)
        clock.advance(days=19)

        returned = engine.checkin(loan.id)

        assert returned.overdue_days == 5
        assert returned.is_overdue is False
        fines = engine.fines.fines_for_loan(loan.id)
        assert len(fines) == 1
        assert fines[0].type == FineType.OVERDUE
        assert fines[0].amount == Decimal("5.00")
        assert fines[0].status == FineStatus.PENDING

        overdue_notices = notifier.of_kind("overdue")
        assert overdue_notices == [
            {
                "user_id": users[0],
                "book_title": "Late Book",
                "overdue_days": 5,
                "fine_amount": Decimal("5.00"),
            }
        ]

    def test_return_within_grace_period_sends_no_notice(
        self, make_engine, test_db_session, add_book, users, clock, notifier
    ):
        engine = make_engine(test_db_session, calculator=FineCalculator(grace_period_days=2))
        add_book("book_grace")
        loan = engine.checkout(users[0], "book_grace", requested_days=7)
        clock.advance(days=8)

        returned = engine.checkin(loan.id)

        assert returned.overdue_days == 0
        assert engine.fines.fines_for_loan(loan.id) == []
        assert notifier.of_kind("overdue") == []

    def test_late_fine_is_capped(self, engine, add_book, users, clock):
        add_book("book_very_late")
        loan = engine.checkout(users[0], "book_very_late", requested_days=14)
        clock.advance(days=200)

        engine.checkin(loan.id)

        fines = engine.fines.fines_for_loan(loan.id)
        assert fines[0].amount == Decimal("50.00")

    def test_lost_copy_is_written_off(self, engine, add_book, users):
        add_book("book_lost", copies=2)
        loan = engine.checkout(users[0], "book_lost")

        returned = engine.checkin(loan.id, CheckinCondition.LOST, notes="Left on a train")

        assert returned.status == LoanStatus.LOST
        assert "Left on a train" in returned.notes
        assert engine.ledger.availability("book_lost") == 1
        fines = engine.fines.fines_for_loan(loan.id)
        assert [(f.type, f.amount) for f in fines] == [(FineType.LOST, Decimal("100.00"))]

    def test_damaged_copy_returns_to_circulation(self, engine, add_book, users):
        add_book("book_damaged")
        loan = engine.checkout(users[0], "book_damaged")

        returned = engine.checkin(loan.id, "damaged")

        assert returned.status == LoanStatus.DAMAGED
        assert engine.ledger.availability("book_damaged") == 1
        fines = engine.fines.fines_for_loan(loan.id)
        assert [(f.type, f.amount) for f in fines] == [(FineType.DAMAGED, Decimal("25.00"))]

    def test_late_lost_copy_carries_both_fines(self, engine, add_book, users, clock):
        add_book("book_late_lost")
        loan = engine.checkout(users[0], "book_late_lost", requested_days=14)
        clock.advance(days=17)

        engine.checkin(loan.id, CheckinCondition.LOST)

        fines = {FineType(f.type): f.amount for f in engine.fines.fines_for_loan(loan.id)}
        assert fines == {FineType.OVERDUE: Decimal("3.00"), FineType.LOST: Decimal("100.00")}

    def test_closed_loan_cannot_be_checked_in_again(self, engine, add_book, users):
        add_book("book_twice")
        loan = engine.checkout(users[0], "book_twice")
        engine.checkin(loan.id)

        with pytest.raises(CirculationError) as exc_info:
            engine.checkin(loan.id)

        assert_circulation_error(exc_info, ErrorKind.INVALID_STATE_TRANSITION, "loan_not_active")
        assert engine.ledger.availability("book_twice") == 1

    def test_unknown_loan(self, engine):
        with pytest.raises(CirculationError) as exc_info:
            engine.checkin("loan_missing")

        assert_circulation_error(exc_info, ErrorKind.NOT_FOUND, "loan_not_found")

    def test_returned_book_can_be_borrowed_again(self, engine, add_book, users):
        add_book("book_again")
        first = engine.checkout(users[0], "book_again")
        engine.checkin(first.id)

        second = engine.checkout(users[0], "book_again")

        assert second.id != first.id
        assert second.status == LoanStatus.CHECKED_OUT


class TestRenewal:
    def test_renewal_extends_due_date(self, engine, add_book, users):
        add_book("book_renew")
        loan = engine.checkout(users[0], "book_renew")

        renewed = engine.renew_checkout(loan.id, notes="Still reading")

        assert renewed.renewal_count == 1
        assert renewed.due_date == loan.due_date + timedelta(days=14)
        assert "Still reading" in renewed.notes

    def test_custom_extension(self, engine, add_book, users):
        add_book("book_extend")
        loan = engine.checkout(users[0], "book_extend")

        renewed = engine.renew_checkout(loan.id, extension_days=5)

        assert renewed.due_date == loan.due_date + timedelta(days=5)

    def test_renewal_limit(self, engine, add_book, users):
        add_book("book_limit")
        loan = engine.checkout(users[0], "book_limit")
        engine.renew_checkout(loan.id)
        renewed = engine.renew_checkout(loan.id)
        assert renewed.renewal_count == renewed.max_renewals

        with pytest.raises(CirculationError) as exc_info:
            engine.renew_checkout(loan.id)

        assert_circulation_error(exc_info, ErrorKind.POLICY_VIOLATION, "renewal_limit_reached")
        assert engine.loans.get_loan(loan.id).renewal_count == 2

    def test_overdue_loan_must_be_returned(self, engine, add_book, users, clock):
        add_book("book_overdue_renew")
        loan = engine.checkout(users[0], "book_overdue_renew", requested_days=7)
        clock.advance(days=9)
        engine.run_overdue_sweep()
        assert engine.loans.get_loan(loan.id).is_overdue is True

        with pytest.raises(CirculationError) as exc_info:
            engine.renew_checkout(loan.id)

        assert_circulation_error(exc_info, ErrorKind.POLICY_VIOLATION, "overdue_must_return")

    def test_past_due_loan_cannot_be_renewed_before_the_sweep(
        self, engine, add_book, users, clock
    ):
        add_book("book_unswept")
        loan = engine.checkout(users[0], "book_unswept", requested_days=7)
        clock.advance(days=8)

        with pytest.raises(CirculationError) as exc_info:
            engine.renew_checkout(loan.id)

        assert_circulation_error(exc_info, ErrorKind.POLICY_VIOLATION, "overdue_must_return")

    def test_returned_loan_cannot_be_renewed(self, engine, add_book, users):
        add_book("book_done")
        loan = engine.checkout(users[0], "book_done")
        engine.checkin(loan.id)

        with pytest.raises(CirculationError) as exc_info:
            engine.renew_checkout(loan.id)

        assert_circulation_error(exc_info, ErrorKind.INVALID_STATE_TRANSITION, "loan_not_active")


class TestOverdueSweep:
    def test_sweep_marks_past_due_loans(self, engine, add_book, users, clock, notifier):
        add_book("book_sweep_a")
        add_book("book_sweep_b")
        late = engine.checkout(users[0], "book_sweep_a", requested_days=7)
        on_time = engine.checkout(users[1], "book_sweep_b", requested_days=14)
        clock.advance(days=10)

        assert engine.run_overdue_sweep() == 1

        late_loan = engine.loans.get_loan(late.id)
        assert late_loan.status == LoanStatus.OVERDUE
        assert late_loan.is_overdue is True
        assert late_loan.overdue_days == 3
        assert engine.loans.get_loan(on_time.id).status == LoanStatus.CHECKED_OUT
        assert [f.amount for f in engine.fines.fines_for_loan(late.id)] == [Decimal("3.00")]
        assert len(notifier.of_kind("overdue")) == 1

    def test_sweep_within_grace_period_sends_no_notice(
        self, make_engine, test_db_session, add_book, users, clock, notifier
    ):
        engine = make_engine(test_db_session, calculator=FineCalculator(grace_period_days=2))
        add_book("book_grace_sweep")
        loan = engine.checkout(users[0], "book_grace_sweep", requested_days=7)
        clock.advance(days=9)

        assert engine.run_overdue_sweep() == 1
        assert engine.loans.get_loan(loan.id).status == LoanStatus.OVERDUE
        assert notifier.of_kind("overdue") == []

        clock.advance(days=1)
        engine.run_overdue_sweep()

        assert [n["overdue_days"] for n in notifier.of_kind("overdue")] == [1]

    def test_sweep_is_idempotent_within_a_day(self, engine, add_book, users, clock, notifier):
        add_book("book_idem")
        loan = engine.checkout(users[0], "book_idem", requested_days=7)
        clock.advance(days=11)

        assert engine.run_overdue_sweep() == 1
        assert engine.run_overdue_sweep() == 0

        fines = engine.fines.fines_for_loan(loan.id)
        assert len(fines) == 1
        assert fines[0].amount == Decimal("4.00")
        assert engine.loans.get_loan(loan.id).overdue_days == 4
        assert len(notifier.of_kind("overdue")) == 1

    def test_later_sweeps_recompute_the_same_fine(self, engine, add_book, users, clock, notifier):
        add_book("book_accrue")
        loan = engine.checkout(users[0], "book_accrue", requested_days=7)
        clock.advance(days=9)
        engine.run_overdue_sweep()
        clock.advance(days=3)

        assert engine.run_overdue_sweep() == 0

        fines = engine.fines.fines_for_loan(loan.id)
        assert len(fines) == 1
        assert fines[0].amount == Decimal("5.00")
        assert [n["overdue_days"] for n in notifier.of_kind("overdue")] == [2, 5]

    def test_checkin_after_sweep_updates_existing_fine(self, engine, add_book, users, clock):
        add_book("book_swept_return")
        loan = engine.checkout(users[0], "book_swept_return", requested_days=7)
        clock.advance(days=9)
        engine.run_overdue_sweep()
        clock.advance(days=1)

        returned = engine.checkin(loan.id)

        assert returned.status == LoanStatus.RETURNED
        assert returned.is_overdue is False
        assert returned.overdue_days == 3
        fines = engine.fines.fines_for_loan(loan.id)
        assert [(f.type, f.amount) for f in fines] == [(FineType.OVERDUE, Decimal("3.00"))]

    def test_sweep_with_nothing_due(self, engine, add_book, users):
        add_book("book_fresh")
        engine.checkout(users[0], "book_fresh")

        assert engine.run_overdue_sweep() == 0


class TestDueDateReminders:
    def test_reminds_loans_due_soon(self, engine, add_book, users, clock, notifier):
        add_book("book_soon", title="Due Soon")
        add_book("book_later")
        soon = engine.checkout(users[0], "book_soon", requested_days=2)
        engine.checkout(users[1], "book_later", requested_days=10)

        assert engine.send_due_date_reminders() == 1

        assert notifier.of_kind("due_soon") == [
            {"user_id": users[0], "book_title": "Due Soon", "due_date": soon.due_date}
        ]

    def test_wider_window(self, engine, add_book, users):
        add_book("book_window_a")
        add_book("book_window_b")
        engine.checkout(users[0], "book_window_a", requested_days=2)
        engine.checkout(users[1], "book_window_b", requested_days=10)

        assert engine.send_due_date_reminders(days_ahead=10) == 2


class TestLoanQueries:
    def test_days_until_due(self, engine, add_book, users, clock):
        add_book("book_days")
        loan = engine.checkout(users[0], "book_days", requested_days=10)

        assert engine.loans.days_until_due(loan.id) == 10
        clock.advance(days=12)
        assert engine.loans.days_until_due(loan.id) == -2

    def test_loans_for_user(self, engine, add_book, users):
        add_book("book_hist_a")
        add_book("book_hist_b")
        first = engine.checkout(users[0], "book_hist_a")
        engine.checkout(users[0], "book_hist_b")
        engine.checkin(first.id)

        assert len(engine.loans.loans_for_user(users[0])) == 2
        active = engine.loans.loans_for_user(users[0], LoanStatus.CHECKED_OUT)
        assert [loan.book_id for loan in active] == ["book_hist_b"]
