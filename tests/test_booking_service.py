"""
Booking lifecycle tests: idempotent creation, confirmation, cancellation,
refunds and the fixed-amount guard.
"""

import json
import threading
from dataclasses import replace
from datetime import timedelta
from decimal import Decimal

import pytest

from models import AuditLog, Booking, BookingIdempotency, BookingStatus, RefundStatus, Trip
from services.audit_logger import AuditContext, audit_logger
from services.booking_service import (
    cancel_booking,
    confirm_booking,
    create_booking,
    refund_booking,
)
from services.feature_flags import FeatureFlagSnapshot, FlagState
from services.rfp_offer_service import accept_offer
from services.trip_consent_service import cancel_trip
from utils.exceptions import (
    ConflictError, ExpiredError, StateTransitionError, UnauthorizedError, ValidationFailedError
)
from utils.helpers import utcnow


def booking_audit_rows(session, event_type):
    return session.query(AuditLog).filter(AuditLog.event_type == event_type).count()


class TestCreateBookingIdempotency:

    def test_creates_hold_with_offer_terms(self, db_session, accepted_offer, client_context):
        result = create_booking(db_session, accepted_offer.id, "idem-key-001", client_context)
        response = result.value

        assert result.replayed is False
        assert response["status"] == BookingStatus.HOLD.value
        assert response["amount"] == "52000.00"
        assert response["currency"] == "INR"
        assert response["offer_id"] == accepted_offer.id
        assert response["hold_expires_at"] is not None
        assert result.audit_entry.event_type == "booking.created"
        assert result.audit_entry.event_data["idempotency_key"] == "idem-key-001"

    def test_same_key_replays_identical_response(self, db_session, accepted_offer, client_context):
        first = create_booking(db_session, accepted_offer.id, "idem-key-002", client_context)
        second = create_booking(db_session, accepted_offer.id, "idem-key-002", client_context)
        third = create_booking(db_session, accepted_offer.id, "idem-key-002", client_context)

        assert second.replayed is True
        assert second.audit_entry is None
        assert json.dumps(first.value, sort_keys=True) == json.dumps(second.value, sort_keys=True)
        assert json.dumps(second.value, sort_keys=True) == json.dumps(third.value, sort_keys=True)
        assert db_session.query(Booking).count() == 1
        assert booking_audit_rows(db_session, "booking.created") == 1

    def test_key_reused_for_other_request_is_conflict(self, db_session, accepted_offer, client_context):
        create_booking(db_session, accepted_offer.id, "idem-key-003", client_context)
        with pytest.raises(ConflictError) as exc_info:
            create_booking(db_session, accepted_offer.id, "idem-key-003", client_context, payment_token="tok_placeholder")
        assert exc_info.value.reason == "idempotency_key_reused"

    def test_new_key_for_booked_offer_is_conflict(self, db_session, accepted_offer, client_context):
        create_booking(db_session, accepted_offer.id, "idem-key-004", client_context)
        with pytest.raises(ConflictError) as exc_info:
            create_booking(db_session, accepted_offer.id, "idem-key-005", client_context)
        assert exc_info.value.reason == "offer_already_booked"
        # The losing claim is rolled back with the rest of the request
        assert db_session.get(BookingIdempotency, "idem-key-005") is None

    def test_expired_key_is_executed_afresh(self, db_session, accepted_offer, client_context):
        long_ago = utcnow() - timedelta(hours=25)
        create_booking(db_session, accepted_offer.id, "idem-key-006", client_context, now=long_ago)

        # Past the key's TTL the request runs again instead of replaying
        with pytest.raises(ConflictError) as exc_info:
            create_booking(db_session, accepted_offer.id, "idem-key-006", client_context)
        assert exc_info.value.reason == "offer_already_booked"
        db_session.expire_all()
        assert db_session.get(BookingIdempotency, "idem-key-006").created_at == long_ago

    def test_offer_must_be_accepted(self, db_session, two_offers, client_context):
        accept_offer(db_session, two_offers[0].id, client_context)
        with pytest.raises(ConflictError) as exc_info:
            create_booking(db_session, two_offers[1].id, "idem-key-007", client_context)
        assert exc_info.value.reason == "offer_not_accepted"
        assert db_session.query(BookingIdempotency).count() == 0

    def test_only_trip_owner_books(self, db_session, accepted_offer, stranger_context):
        with pytest.raises(UnauthorizedError):
            create_booking(db_session, accepted_offer.id, "idem-key-008", stranger_context)
        assert db_session.query(Booking).count() == 0

    @pytest.mark.parametrize("key", ["", "   ", "k" * 256])
    def test_invalid_keys_rejected(self, db_session, accepted_offer, client_context, key):
        with pytest.raises(ValidationFailedError):
            create_booking(db_session, accepted_offer.id, key, client_context)

    def test_auto_book_confirms_immediately(self, db_session, accepted_offer, client_context):
        context = client_context.with_flags(FeatureFlagSnapshot.from_overrides(auto_book=True))
        result = create_booking(db_session, accepted_offer.id, "idem-key-009", context, payment_token="tok_placeholder")

        assert result.value["status"] == BookingStatus.CONFIRMED.value
        assert result.value["confirmed_at"] is not None
        assert result.audit_entry.event_data["auto_confirmed"] is True
        assert db_session.get(Trip, result.value["trip_id"]).status == "booked"

    def test_auto_book_off_keeps_hold(self, db_session, accepted_offer, client_context):
        result = create_booking(db_session, accepted_offer.id, "idem-key-010", client_context, payment_token="tok_placeholder")
        assert result.value["status"] == BookingStatus.HOLD.value
        assert result.audit_entry.event_data["auto_confirmed"] is False

    def test_auto_book_segment_targeting(self, db_session, accepted_offer, client_context):
        flags = dict(FeatureFlagSnapshot.defaults().flags)
        flags["auto_book"] = FlagState(enabled=True, rollout_percentage=1, user_segments=("beta",))
        context = replace(client_context, segment="beta", feature_flags=FeatureFlagSnapshot(flags))

        result = create_booking(db_session, accepted_offer.id, "idem-key-012", context, payment_token="tok_placeholder")
        assert result.value["status"] == BookingStatus.CONFIRMED.value
        assert result.audit_entry.event_data["segment"] == "beta"

    def test_cancelled_trip_cannot_be_booked(self, db_session, accepted_offer, client_context):
        cancel_trip(db_session, accepted_offer.rfp.trip_id, client_context)

        with pytest.raises(ConflictError) as exc_info:
            create_booking(db_session, accepted_offer.id, "idem-key-011", client_context)
        assert exc_info.value.reason == "trip_closed"
        assert db_session.query(Booking).count() == 0
        assert db_session.get(BookingIdempotency, "idem-key-011") is None
        assert booking_audit_rows(db_session, "booking.created") == 0


class TestConcurrentBookingCreation:
    """Concurrent requests sharing one idempotency key: one executes, the rest replay"""

    def test_same_key_executes_once(self, db_session, session_factory, accepted_offer, client_context):
        offer_id = accepted_offer.id
        db_session.close()

        attempts = 5
        barrier = threading.Barrier(attempts)
        outcomes = []
        lock = threading.Lock()

        def attempt():
            session = session_factory()
            try:
                barrier.wait()
                result = create_booking(session, offer_id, "idem-key-shared", client_context)
                outcome = ("ok", result.replayed, result.value["booking_id"])
            except Exception as e:
                outcome = ("error", None, repr(e))
            finally:
                session.close()
            with lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=attempt) for _ in range(attempts)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert all(status == "ok" for status, _, _ in outcomes), outcomes
        assert sorted(replayed for _, replayed, _ in outcomes) == [False] + [True] * (attempts - 1)
        assert len({booking_id for _, _, booking_id in outcomes}) == 1

        verify = session_factory()
        try:
            assert verify.query(Booking).filter(Booking.offer_id == offer_id).count() == 1
            assert verify.query(BookingIdempotency).count() == 1
            assert booking_audit_rows(verify, "booking.created") == 1
        finally:
            verify.close()


class TestConfirmBooking:

    def test_confirm_moves_trip_to_booked(self, db_session, held_booking, client_context):
        result = confirm_booking(db_session, held_booking["booking_id"], "tok_placeholder", client_context, "card")
        booking = result.value

        assert booking.status == BookingStatus.CONFIRMED.value
        assert booking.payment_method == "card"
        assert booking.confirmed_at is not None
        assert booking.trip.status == "booked"
        assert result.audit_entry.before_state["status"] == "hold"
        assert result.audit_entry.after_state["status"] == "confirmed"
        assert result.audit_entry.event_data["trip_status_after"] == "booked"

    def test_payment_token_required(self, db_session, held_booking, client_context):
        with pytest.raises(ValidationFailedError):
            confirm_booking(db_session, held_booking["booking_id"], "", client_context)

    def test_expired_hold_cannot_be_confirmed(self, db_session, held_booking, client_context):
        later = utcnow() + timedelta(minutes=16)
        with pytest.raises(ExpiredError) as exc_info:
            confirm_booking(db_session, held_booking["booking_id"], "tok_placeholder", client_context, now=later)
        assert exc_info.value.reason == "hold_expired"
        db_session.expire_all()
        assert db_session.get(Booking, held_booking["booking_id"]).status == BookingStatus.HOLD.value

    def test_confirm_twice_is_illegal(self, db_session, held_booking, client_context):
        confirm_booking(db_session, held_booking["booking_id"], "tok_placeholder", client_context)
        before = audit_logger.count(db_session)
        with pytest.raises(StateTransitionError):
            confirm_booking(db_session, held_booking["booking_id"], "tok_placeholder", client_context)
        assert audit_logger.count(db_session) == before

    def test_stranger_cannot_confirm(self, db_session, held_booking, stranger_context):
        with pytest.raises(UnauthorizedError):
            confirm_booking(db_session, held_booking["booking_id"], "tok_placeholder", stranger_context)


class TestCancelAndRefund:

    def test_cancel_hold(self, db_session, held_booking, client_context):
        result = cancel_booking(db_session, held_booking["booking_id"], client_context)
        booking = result.value
        assert booking.status == BookingStatus.CANCELLED.value
        assert booking.refund_status == RefundStatus.NOT_APPLICABLE.value
        assert booking.refund_amount == Decimal("0")
        assert result.audit_entry.event_type == "booking.cancelled"

    def test_confirmed_booking_cannot_be_cancelled(self, db_session, held_booking, client_context):
        confirm_booking(db_session, held_booking["booking_id"], "tok_placeholder", client_context)
        with pytest.raises(StateTransitionError):
            cancel_booking(db_session, held_booking["booking_id"], client_context)

    def test_held_booking_cannot_be_refunded(self, db_session, held_booking, client_context):
        with pytest.raises(StateTransitionError):
            refund_booking(db_session, held_booking["booking_id"], client_context)

    def test_refund_without_start_date_is_full(self, db_session, held_booking, client_context):
        confirm_booking(db_session, held_booking["booking_id"], "tok_placeholder", client_context)
        result = refund_booking(db_session, held_booking["booking_id"], client_context)
        booking = result.value

        assert booking.status == BookingStatus.REFUNDED.value
        assert booking.refund_status == RefundStatus.PROCESSED.value
        assert booking.refund_amount == Decimal("52000.00")
        assert result.audit_entry.event_data["refund_rule"] == "unknown_start"
        # Refunding leaves the trip where it was
        assert booking.trip.status == "booked"

    @pytest.mark.parametrize("days_before,expected", [
        (10, Decimal("52000.00")),
        (3, Decimal("26000.00")),
        (1, Decimal("0.00")),
    ])
    def test_refund_follows_notice_tiers(self, db_session, held_booking, client_context, days_before, expected):
        confirm_booking(db_session, held_booking["booking_id"], "tok_placeholder", client_context)
        trip = db_session.get(Trip, held_booking["trip_id"])
        start = utcnow() + timedelta(days=30)
        trip.travel_start_at = start
        db_session.commit()

        result = refund_booking(
            db_session, held_booking["booking_id"], client_context, now=start - timedelta(days=days_before)
        )
        assert result.value.refund_amount == expected

    def test_system_may_refund(self, db_session, held_booking, client_context):
        confirm_booking(db_session, held_booking["booking_id"], "tok_placeholder", client_context)
        result = refund_booking(
            db_session, held_booking["booking_id"], AuditContext.system("ops_refund"), reason="provider_cancelled"
        )
        assert result.value.cancellation_reason == "provider_cancelled"


class TestBookingAmountGuard:

    def test_amount_is_fixed_after_hold(self, db_session, held_booking):
        booking = db_session.get(Booking, held_booking["booking_id"])
        booking.amount = Decimal("1.00")
        with pytest.raises(ValidationFailedError) as exc_info:
            db_session.flush()
        assert exc_info.value.reason == "booking_amount_fixed"
        db_session.rollback()

    def test_currency_is_fixed_after_hold(self, db_session, held_booking):
        booking = db_session.get(Booking, held_booking["booking_id"])
        booking.currency = "USD"
        with pytest.raises(ValidationFailedError):
            db_session.flush()
        db_session.rollback()

    def test_rewriting_same_amount_is_allowed(self, db_session, held_booking):
        booking = db_session.get(Booking, held_booking["booking_id"])
        booking.amount = Decimal("52000.00")
        db_session.flush()
        db_session.commit()
