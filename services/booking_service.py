"""
Booking State Machine
=====================

Legal edges: hold -> confirmed, hold -> cancelled, confirmed -> refunded.

create_booking is at-most-once per idempotency key: the key row is claimed
first (primary-key uniqueness), so of two concurrent requests with the same
key only one inserts a booking; the other rolls back and replays the cached
response. A live key replays without re-executing or auditing; a key reused
for a different request is a conflict; an expired key is discarded.

Status changes after creation are conditional UPDATEs on the current status,
so a confirmation racing the hold-expiry sweep has exactly one winner.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import Config
from models import (
    Booking, BookingIdempotency, BookingStatus, OfferStatus, TripStatus, RefundStatus
)
from services.audit_logger import AuditContext, AuditedResult, audit_logger
from services.feature_flags import snapshot_for
from services.refund_policy import calculate_refund
from services.rfp_offer_service import get_offer
from services.trip_consent_service import ensure_owner, ensure_trip_open, transition_trip
from utils.atomic_transactions import atomic_transaction
from utils.exceptions import ConflictError, ExpiredError, NotFoundError, ValidationFailedError
from utils.helpers import json_safe, resolve_now, snapshot_model, stable_hash, to_naive_utc
from utils.lifecycle_state_validators import BookingStateValidator

logger = logging.getLogger(__name__)

MAX_IDEMPOTENCY_KEY_LENGTH = 255


def get_booking(session: Session, booking_id: str) -> Booking:
    booking = session.get(Booking, booking_id)
    if booking is None:
        raise NotFoundError("booking", booking_id)
    return booking


def build_booking_response(booking: Booking) -> Dict[str, Any]:
    """Response cached against the idempotency key; JSON-native values only"""
    return json_safe({
        "booking_id": booking.id,
        "offer_id": booking.offer_id,
        "trip_id": booking.trip_id,
        "provider_id": booking.provider_id,
        "status": booking.status,
        "amount": booking.amount,
        "currency": booking.currency,
        "hold_expires_at": booking.hold_expires_at,
        "confirmed_at": booking.confirmed_at,
        "created_at": booking.created_at,
    })


def booking_request_hash(offer_id: str, context: AuditContext, payment_token: Optional[str],
                         payment_method: Optional[str]) -> str:
    return stable_hash({
        "offer_id": offer_id,
        "actor_id": context.actor_id,
        "payment_token": payment_token,
        "payment_method": payment_method,
    })


def _validate_idempotency_key(idempotency_key: str):
    if not isinstance(idempotency_key, str) or not idempotency_key.strip():
        raise ValidationFailedError("idempotency_key is required", reason="invalid_idempotency_key")
    if len(idempotency_key) > MAX_IDEMPOTENCY_KEY_LENGTH:
        raise ValidationFailedError("idempotency_key is too long", reason="invalid_idempotency_key")


def _replay(record: BookingIdempotency, request_hash: str) -> AuditedResult[Dict[str, Any]]:
    if record.request_hash != request_hash:
        logger.warning(f"⚠️ IDEMPOTENCY_MISMATCH: key {record.idempotency_key} reused for a different request")
        raise ConflictError(
            "Idempotency key was already used for a different request",
            reason="idempotency_key_reused",
        )
    logger.info(f"🔁 IDEMPOTENT_REPLAY: key {record.idempotency_key} -> booking {record.booking_id}")
    return AuditedResult(value=record.response_data, audit_entry=None, replayed=True)


def create_booking(
    session: Session,
    offer_id: str,
    idempotency_key: str,
    context: AuditContext,
    payment_token: Optional[str] = None,
    payment_method: Optional[str] = None,
    now: Optional[datetime] = None,
) -> AuditedResult[Dict[str, Any]]:
    """
    Create a booking in ``hold`` from an accepted offer, at most once per key.

    When ``auto_book`` is enabled for the actor and a payment token is
    supplied, the booking is confirmed in the same transaction.

    Returns:
        AuditedResult whose value is the booking response; ``replayed`` is
        True (and audit_entry None) when the cached response was returned.

    Raises:
        ConflictError: key reused for another request, offer not accepted,
            or the offer already has a booking
        UnauthorizedError: actor does not own the trip
    """
    _validate_idempotency_key(idempotency_key)
    current = resolve_now(now)
    request_hash = booking_request_hash(offer_id, context, payment_token, payment_method)

    existing = session.get(BookingIdempotency, idempotency_key)
    if existing is not None and to_naive_utc(existing.expires_at) > current:
        result = _replay(existing, request_hash)
        session.commit()
        return result

    try:
        with atomic_transaction(session):
            if existing is not None:
                logger.info(f"🧹 IDEMPOTENCY_EXPIRED: discarding key {idempotency_key}")
                session.delete(existing)
                session.flush()

            claim = BookingIdempotency(
                idempotency_key=idempotency_key,
                request_hash=request_hash,
                created_at=current,
                expires_at=current + timedelta(hours=Config.IDEMPOTENCY_TTL_HOURS),
            )
            session.add(claim)
            session.flush()

            offer = get_offer(session, offer_id)
            trip = offer.rfp.trip
            ensure_owner(trip.user_id, context, "trip", trip.id)
            ensure_trip_open(trip, "booking")
            if offer.status != OfferStatus.ACCEPTED.value:
                raise ConflictError(
                    f"Offer {offer.id} is {offer.status}; only accepted offers can be booked",
                    reason="offer_not_accepted",
                )
            already_booked = session.execute(
                select(Booking.id).where(Booking.offer_id == offer.id)
            ).first()
            if already_booked is not None:
                raise ConflictError(
                    f"Offer {offer.id} already has booking {already_booked.id}",
                    reason="offer_already_booked",
                )

            booking = Booking(
                trip_id=trip.id,
                offer_id=offer.id,
                user_id=trip.user_id,
                provider_id=offer.provider_id,
                status=BookingStatus.HOLD.value,
                amount=offer.price,
                currency=offer.currency,
                payment_method=payment_method,
                hold_expires_at=current + timedelta(minutes=Config.BOOKING_HOLD_MINUTES),
                trace_id=context.trace_id,
                created_at=current,
                updated_at=current,
            )
            session.add(booking)

            auto_confirmed = False
            trip_status_before = trip.status
            flags = snapshot_for(context)
            if payment_token and flags.is_enabled("auto_book", context.actor_id, context.segment):
                BookingStateValidator.ensure_transition(BookingStatus.HOLD, BookingStatus.CONFIRMED)
                booking.status = BookingStatus.CONFIRMED.value
                booking.payment_token = payment_token
                booking.confirmed_at = current
                if trip.status != TripStatus.BOOKED.value:
                    transition_trip(trip, TripStatus.BOOKED)
                auto_confirmed = True
            session.flush()

            response = build_booking_response(booking)
            claim.booking_id = booking.id
            claim.response_data = response
            session.flush()

            entry = audit_logger.append(
                session,
                event_type="booking.created",
                entity_type="booking",
                entity_id=booking.id,
                context=context,
                after=snapshot_model(booking),
                event_data={
                    "offer_id": offer.id,
                    "idempotency_key": idempotency_key,
                    "auto_confirmed": auto_confirmed,
                    "trip_status_before": trip_status_before,
                    "trip_status_after": trip.status,
                },
            )
            logger.info(
                f"📌 BOOKING_CREATED: {booking.id} for offer {offer.id} status={booking.status} "
                f"hold_expires_at={booking.hold_expires_at}"
            )
    except IntegrityError:
        # Lost the race on the key (or on the offer) to a concurrent request
        record = session.get(BookingIdempotency, idempotency_key)
        if record is None or record.response_data is None:
            raise ConflictError(
                f"Offer {offer_id} already has a booking", reason="offer_already_booked"
            )
        result = _replay(record, request_hash)
        session.commit()
        return result

    return AuditedResult(value=response, audit_entry=entry)


def _transition_booking(
    session: Session,
    booking: Booking,
    target: BookingStatus,
    values: Dict[str, Any],
    extra_conditions=(),
) -> bool:
    """Conditional UPDATE from the booking's current status; False if it moved on"""
    source = booking.status
    BookingStateValidator.ensure_transition(source, target, booking.id)
    result = session.execute(
        update(Booking)
        .where(Booking.id == booking.id, Booking.status == source, *extra_conditions)
        .values(status=target.value, **values)
        .execution_options(synchronize_session=False)
    )
    session.expire(booking)
    return result.rowcount == 1


def confirm_booking(
    session: Session,
    booking_id: str,
    payment_token: str,
    context: AuditContext,
    payment_method: Optional[str] = None,
    now: Optional[datetime] = None,
) -> AuditedResult[Booking]:
    """
    Confirm a held booking with a payment token and mark the trip booked.

    Raises:
        ConflictError: booking not in hold (or moved on concurrently), trip closed
        ExpiredError: hold past its deadline
        ValidationFailedError: missing payment token
    """
    if not payment_token:
        raise ValidationFailedError("payment_token is required", reason="payment_token_required")
    current = resolve_now(now)

    with atomic_transaction(session):
        booking = get_booking(session, booking_id)
        ensure_owner(booking.user_id, context, "booking", booking.id)
        BookingStateValidator.ensure_transition(booking.status, BookingStatus.CONFIRMED, booking.id)
        if booking.hold_expires_at is not None and current >= to_naive_utc(booking.hold_expires_at):
            raise ExpiredError(
                f"Hold on booking {booking.id} expired at {booking.hold_expires_at}",
                reason="hold_expired",
            )
        trip = booking.trip
        ensure_trip_open(trip, "booking confirmation")

        before = snapshot_model(booking)
        trip_status_before = trip.status
        confirmed = _transition_booking(
            session, booking, BookingStatus.CONFIRMED,
            {
                "payment_token": payment_token,
                "payment_method": payment_method or before.get("payment_method"),
                "confirmed_at": current,
                "updated_at": current,
            },
            extra_conditions=(Booking.hold_expires_at > current,),
        )
        if not confirmed:
            logger.warning(f"⚠️ CONFIRM_RACE: booking {booking_id} left hold concurrently")
            raise ConflictError(f"Booking {booking_id} is no longer in hold", reason="booking_not_in_hold")

        if trip.status != TripStatus.BOOKED.value:
            transition_trip(trip, TripStatus.BOOKED)
        session.flush()

        entry = audit_logger.append(
            session,
            event_type="booking.confirmed",
            entity_type="booking",
            entity_id=booking.id,
            context=context,
            before=before,
            after=snapshot_model(booking),
            event_data={
                "trip_id": trip.id,
                "trip_status_before": trip_status_before,
                "trip_status_after": trip.status,
            },
        )
        logger.info(f"✅ BOOKING_CONFIRMED: {booking.id} ({booking.amount} {booking.currency})")
    return AuditedResult(value=booking, audit_entry=entry)


def cancel_booking(
    session: Session,
    booking_id: str,
    context: AuditContext,
    reason: str = "client_cancelled",
    now: Optional[datetime] = None,
) -> AuditedResult[Booking]:
    """Cancel a held booking; nothing was paid, so nothing is refunded"""
    current = resolve_now(now)
    with atomic_transaction(session):
        booking = get_booking(session, booking_id)
        ensure_owner(booking.user_id, context, "booking", booking.id)
        before = snapshot_model(booking)

        cancelled = _transition_booking(
            session, booking, BookingStatus.CANCELLED,
            {
                "cancelled_at": current,
                "cancellation_reason": reason,
                "refund_amount": 0,
                "refund_status": RefundStatus.NOT_APPLICABLE.value,
                "refund_processed_at": current,
                "updated_at": current,
            },
        )
        if not cancelled:
            raise ConflictError(f"Booking {booking_id} is no longer in hold", reason="booking_not_in_hold")

        entry = audit_logger.append(
            session,
            event_type="booking.cancelled",
            entity_type="booking",
            entity_id=booking.id,
            context=context,
            before=before,
            after=snapshot_model(booking),
            event_data={"reason": reason},
        )
        logger.info(f"🚫 BOOKING_CANCELLED: {booking.id} reason={reason}")
    return AuditedResult(value=booking, audit_entry=entry)


def refund_booking(
    session: Session,
    booking_id: str,
    context: AuditContext,
    reason: str = "client_requested",
    now: Optional[datetime] = None,
) -> AuditedResult[Booking]:
    """
    Refund a confirmed booking.

    The refundable amount follows the notice given before the trip's
    travel_start_at (see services.refund_policy).
    """
    current = resolve_now(now)
    with atomic_transaction(session):
        booking = get_booking(session, booking_id)
        ensure_owner(booking.user_id, context, "booking", booking.id, allow_system=True)
        BookingStateValidator.ensure_transition(booking.status, BookingStatus.REFUNDED, booking.id)

        decision = calculate_refund(booking.amount, booking.trip.travel_start_at, current)
        before = snapshot_model(booking)
        refunded = _transition_booking(
            session, booking, BookingStatus.REFUNDED,
            {
                "cancelled_at": current,
                "cancellation_reason": reason,
                "refund_amount": decision.amount,
                "refund_status": RefundStatus.PROCESSED.value,
                "refund_processed_at": current,
                "updated_at": current,
            },
        )
        if not refunded:
            raise ConflictError(f"Booking {booking_id} is no longer confirmed", reason="booking_not_confirmed")

        entry = audit_logger.append(
            session,
            event_type="booking.refunded",
            entity_type="booking",
            entity_id=booking.id,
            context=context,
            before=before,
            after=snapshot_model(booking),
            event_data={
                "reason": reason,
                "refund_rule": decision.rule,
                "refund_fraction": decision.fraction,
                "hours_before_start": decision.hours_before_start,
            },
        )
        logger.info(
            f"💸 BOOKING_REFUNDED: {booking.id} refund={decision.amount} {booking.currency} ({decision.rule})"
        )
    return AuditedResult(value=booking, audit_entry=entry)
