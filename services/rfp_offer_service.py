"""
RFP / Offer Matching
====================

publish_rfp turns a consented trip into an anonymized request for proposals,
verified providers bid with submit_offer, and the trip owner picks one with
accept_offer.

Acceptance is serialised in the store, not in process: the offer moves
active -> accepted and the RFP active -> closed through conditional UPDATEs,
and a partial unique index allows at most one accepted offer per RFP. The
loser of a race sees zero affected rows (or the index violation) and gets a
ConflictError; its transaction rolls back without an audit row.
"""

import logging
import re
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import Config
from models import RFP, Offer, TripStatus, RFPStatus, OfferStatus
from services.audit_logger import AuditContext, AuditedResult, audit_logger
from services.feature_flags import snapshot_for
from services.provider_service import ensure_provider_eligible, get_provider
from services.trip_consent_service import (
    active_consents, consent_snapshot, ensure_owner, ensure_trip_open, get_trip, granted_categories,
    transition_trip,
)
from utils.atomic_transactions import atomic_transaction
from utils.exceptions import ConflictError, ExpiredError, NotFoundError, ValidationFailedError
from utils.helpers import json_safe, quantize_amount, resolve_now, snapshot_model, to_naive_utc
from utils.lifecycle_state_validators import OfferStateValidator, RFPStateValidator
from utils.pii_guard import build_anonymized_requirements, validate_anonymized_requirements

logger = logging.getLogger(__name__)

CURRENCY_PATTERN = re.compile(r"^[A-Z]{3}$")
OFFER_TERM_FIELDS = {"price", "currency", "description", "inclusions", "validity_hours"}
MAX_DESCRIPTION_LENGTH = 2000


def get_rfp(session: Session, rfp_id: str) -> RFP:
    rfp = session.get(RFP, rfp_id)
    if rfp is None:
        raise NotFoundError("rfp", rfp_id)
    return rfp


def get_offer(session: Session, offer_id: str) -> Offer:
    offer = session.get(Offer, offer_id)
    if offer is None:
        raise NotFoundError("offer", offer_id)
    return offer


def _to_amount(value: Any, field: str) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise ValidationFailedError(f"{field} must be numeric", reason="invalid_terms")
    try:
        return quantize_amount(value)
    except (InvalidOperation, ValueError):
        raise ValidationFailedError(f"{field} must be numeric", reason="invalid_terms")


def _validate_currency(value: Any) -> str:
    currency = (value or Config.DEFAULT_CURRENCY)
    if not isinstance(currency, str) or not CURRENCY_PATTERN.match(currency.upper()):
        raise ValidationFailedError(f"Invalid currency: {value!r}", reason="invalid_terms")
    return currency.upper()


def validate_budget_range(budget_range: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Normalise {min, max, currency}; amounts stored as decimal strings"""
    if not isinstance(budget_range, dict):
        raise ValidationFailedError("budget_range must be a mapping", reason="invalid_budget_range")
    unknown = sorted(set(budget_range) - {"min", "max", "currency"})
    if unknown:
        raise ValidationFailedError(
            f"Unknown budget_range fields: {unknown}", reason="invalid_budget_range"
        )
    try:
        low = _to_amount(budget_range.get("min"), "budget_range.min")
        high = _to_amount(budget_range.get("max"), "budget_range.max")
        currency = _validate_currency(budget_range.get("currency"))
    except ValidationFailedError as e:
        raise ValidationFailedError(e.message, reason="invalid_budget_range")
    if low < 0 or high <= 0 or low > high:
        raise ValidationFailedError(
            f"budget_range must satisfy 0 <= min <= max, got {low}..{high}",
            reason="invalid_budget_range",
        )
    return {"min": str(low), "max": str(high), "currency": currency}


def validate_offer_terms(terms: Optional[Dict[str, Any]], default_currency: str) -> Dict[str, Any]:
    if not isinstance(terms, dict):
        raise ValidationFailedError("Offer terms must be a mapping", reason="invalid_terms")
    unknown = sorted(set(terms) - OFFER_TERM_FIELDS)
    if unknown:
        raise ValidationFailedError(
            f"Unknown offer terms: {unknown}", reason="invalid_terms", details={"fields": unknown}
        )

    price = _to_amount(terms.get("price"), "price")
    if price <= 0:
        raise ValidationFailedError("price must be positive", reason="invalid_terms")

    validity_hours = terms.get("validity_hours", Config.DEFAULT_OFFER_VALIDITY_HOURS)
    if (isinstance(validity_hours, bool) or not isinstance(validity_hours, int)
            or not 0 < validity_hours <= Config.MAX_OFFER_VALIDITY_HOURS):
        raise ValidationFailedError(
            f"validity_hours must be 1-{Config.MAX_OFFER_VALIDITY_HOURS}", reason="invalid_terms"
        )

    description = terms.get("description")
    if description is not None and (not isinstance(description, str) or len(description) > MAX_DESCRIPTION_LENGTH):
        raise ValidationFailedError("description must be a string of bounded length", reason="invalid_terms")

    inclusions = terms.get("inclusions") or {}
    if isinstance(inclusions, (list, tuple)):
        inclusions = {"items": list(inclusions)}
    if not isinstance(inclusions, dict):
        raise ValidationFailedError("inclusions must be a mapping or a list", reason="invalid_terms")

    return {
        "price": price,
        "currency": _validate_currency(terms.get("currency") or default_currency),
        "description": description,
        "inclusions": json_safe(inclusions),
        "validity_hours": validity_hours,
    }


def _ensure_rfp_open(rfp: RFP, now: datetime):
    if rfp.status == RFPStatus.EXPIRED.value:
        raise ExpiredError(f"RFP {rfp.id} has expired", reason="rfp_expired")
    if rfp.status != RFPStatus.ACTIVE.value:
        raise ConflictError(
            f"RFP {rfp.id} is {rfp.status}", reason="rfp_closed", details={"rfp_status": rfp.status}
        )
    if now >= to_naive_utc(rfp.expires_at):
        raise ExpiredError(f"RFP {rfp.id} expired at {rfp.expires_at}", reason="rfp_expired")


# ---------------------------------------------------------------------------
# RFPs
# ---------------------------------------------------------------------------

def publish_rfp(
    session: Session,
    trip_id: str,
    budget_range: Dict[str, Any],
    context: AuditContext,
    fields: Optional[Iterable[str]] = None,
    now: Optional[datetime] = None,
) -> AuditedResult[RFP]:
    """
    Publish an anonymized RFP for a trip and move the trip to ``ready``.

    Raises:
        FeatureDisabledError: provider_rfp is off for the actor
        ConflictError: trip not planning/ready, no active consent, or a
            requested field's consent category is not granted
        ValidationFailedError: budget range malformed or a field would leak PII
    """
    snapshot_for(context).require("provider_rfp", context.actor_id, context.segment)
    normalised_budget = validate_budget_range(budget_range)
    current = resolve_now(now)

    with atomic_transaction(session):
        trip = get_trip(session, trip_id)
        ensure_owner(trip.user_id, context, "trip", trip.id)
        if trip.status not in (TripStatus.PLANNING.value, TripStatus.READY.value):
            raise ConflictError(
                f"Trip {trip.id} is {trip.status}; RFPs can only be published while planning",
                reason="trip_not_open",
                details={"trip_status": trip.status},
            )
        if not active_consents(trip, current):
            raise ConflictError(
                f"Trip {trip.id} has no active consent",
                reason="consent_required",
            )

        requirements = build_anonymized_requirements(
            trip, granted_categories(trip, current), has_active_consent=True, fields=fields
        )
        trip_status_before = trip.status

        rfp = RFP(
            trip_id=trip.id,
            anonymized_requirements=requirements,
            budget_range=normalised_budget,
            expires_at=current + timedelta(hours=Config.RFP_TTL_HOURS),
            status=RFPStatus.ACTIVE.value,
            trace_id=context.trace_id,
            created_at=current,
        )
        session.add(rfp)
        if trip.status == TripStatus.PLANNING.value:
            transition_trip(trip, TripStatus.READY)
        session.flush()
        # Persisted payload is checked again after any column-level coercion
        validate_anonymized_requirements(rfp.anonymized_requirements)

        entry = audit_logger.append(
            session,
            event_type="rfp.published",
            entity_type="rfp",
            entity_id=rfp.id,
            context=context,
            after=snapshot_model(rfp),
            event_data={
                "trip_id": trip.id,
                "trip_status_before": trip_status_before,
                "trip_status_after": trip.status,
                "published_fields": sorted(requirements),
            },
            consent_snapshot=consent_snapshot(trip, current),
        )
        logger.info(
            f"📢 RFP_PUBLISHED: {rfp.id} for trip {trip.id} fields={sorted(requirements)} "
            f"expires={rfp.expires_at}"
        )
    return AuditedResult(value=rfp, audit_entry=entry)


def expire_rfp(session: Session, rfp_id: str, context: AuditContext,
               now: Optional[datetime] = None) -> AuditedResult[bool]:
    """Mark an active RFP past its deadline as expired; no-op if it moved on"""
    current = resolve_now(now)
    with atomic_transaction(session):
        rfp = get_rfp(session, rfp_id)
        before = snapshot_model(rfp)
        result = session.execute(
            update(RFP)
            .where(RFP.id == rfp.id, RFP.status == RFPStatus.ACTIVE.value, RFP.expires_at <= current)
            .values(status=RFPStatus.EXPIRED.value)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return AuditedResult(value=False, audit_entry=None)
        session.expire(rfp)

        entry = audit_logger.append(
            session,
            event_type="rfp.expired",
            entity_type="rfp",
            entity_id=rfp.id,
            context=context,
            before=before,
            after=snapshot_model(rfp),
        )
        logger.info(f"⏰ RFP_EXPIRED: {rfp.id}")
    return AuditedResult(value=True, audit_entry=entry)


# ---------------------------------------------------------------------------
# Offers
# ---------------------------------------------------------------------------

def submit_offer(
    session: Session,
    rfp_id: str,
    provider_id: str,
    terms: Dict[str, Any],
    context: AuditContext,
    now: Optional[datetime] = None,
) -> AuditedResult[Offer]:
    """
    Submit a provider's bid against an active RFP.

    Raises:
        ExpiredError: RFP past its deadline
        ConflictError: RFP not active, provider not verified or inactive,
            or the provider already has an active offer on this RFP
        ValidationFailedError: malformed terms
    """
    current = resolve_now(now)
    with atomic_transaction(session):
        rfp = get_rfp(session, rfp_id)
        ensure_trip_open(rfp.trip, "offer submission")
        _ensure_rfp_open(rfp, current)
        provider = get_provider(session, provider_id)
        ensure_provider_eligible(provider)

        cleaned = validate_offer_terms(terms, rfp.budget_range.get("currency") or Config.DEFAULT_CURRENCY)

        existing = session.execute(
            select(Offer.id).where(
                Offer.rfp_id == rfp.id,
                Offer.provider_id == provider.id,
                Offer.status == OfferStatus.ACTIVE.value,
            )
        ).first()
        if existing is not None:
            raise ConflictError(
                f"Provider {provider.id} already has an active offer on RFP {rfp.id}",
                reason="duplicate_offer",
                details={"offer_id": existing.id},
            )

        offer = Offer(
            rfp_id=rfp.id,
            provider_id=provider.id,
            status=OfferStatus.ACTIVE.value,
            expires_at=current + timedelta(hours=cleaned["validity_hours"]),
            trace_id=context.trace_id,
            created_at=current,
            **cleaned,
        )
        session.add(offer)
        session.flush()

        entry = audit_logger.append(
            session,
            event_type="offer.submitted",
            entity_type="offer",
            entity_id=offer.id,
            context=context,
            after=snapshot_model(offer),
            event_data={"rfp_id": rfp.id, "provider_id": provider.id},
        )
        logger.info(f"💼 OFFER_SUBMITTED: {offer.id} on RFP {rfp.id} by {provider.id} ({offer.price} {offer.currency})")
    return AuditedResult(value=offer, audit_entry=entry)


def accept_offer(
    session: Session,
    offer_id: str,
    context: AuditContext,
    now: Optional[datetime] = None,
) -> AuditedResult[Offer]:
    """
    Accept an offer on behalf of the trip owner and close its RFP.

    Other offers on the RFP are left untouched.

    Raises:
        UnauthorizedError: actor does not own the trip
        ExpiredError: offer or RFP past its deadline
        ConflictError: offer not active, RFP already closed (another offer won),
            or provider no longer verified
    """
    current = resolve_now(now)
    with atomic_transaction(session):
        offer = get_offer(session, offer_id)
        rfp = offer.rfp
        trip = rfp.trip
        ensure_owner(trip.user_id, context, "trip", trip.id)
        ensure_trip_open(trip, "offer acceptance")

        if offer.status == OfferStatus.EXPIRED.value:
            raise ExpiredError(f"Offer {offer.id} has expired", reason="offer_expired")
        OfferStateValidator.ensure_transition(offer.status, OfferStatus.ACCEPTED, offer.id)
        _ensure_rfp_open(rfp, current)
        if offer.expires_at is not None and current >= to_naive_utc(offer.expires_at):
            raise ExpiredError(f"Offer {offer.id} expired at {offer.expires_at}", reason="offer_expired")
        ensure_provider_eligible(offer.provider)

        before = snapshot_model(offer)
        try:
            accepted = session.execute(
                update(Offer)
                .where(Offer.id == offer.id, Offer.status == OfferStatus.ACTIVE.value)
                .values(status=OfferStatus.ACCEPTED.value)
                .execution_options(synchronize_session=False)
            )
        except IntegrityError:
            logger.warning(f"⚠️ ACCEPT_RACE: RFP {rfp.id} already has an accepted offer")
            raise ConflictError(
                f"RFP {rfp.id} already has an accepted offer", reason="offer_already_accepted"
            )
        if accepted.rowcount != 1:
            raise ConflictError(f"Offer {offer.id} is no longer active", reason="offer_not_active")

        RFPStateValidator.ensure_transition(RFPStatus.ACTIVE, RFPStatus.CLOSED, rfp.id)
        closed = session.execute(
            update(RFP)
            .where(RFP.id == rfp.id, RFP.status == RFPStatus.ACTIVE.value)
            .values(status=RFPStatus.CLOSED.value)
            .execution_options(synchronize_session=False)
        )
        if closed.rowcount != 1:
            logger.warning(f"⚠️ ACCEPT_RACE: RFP {rfp.id} closed by a concurrent acceptance")
            raise ConflictError(
                f"RFP {rfp.id} already has an accepted offer", reason="offer_already_accepted"
            )
        session.expire(offer)
        session.expire(rfp)

        entry = audit_logger.append(
            session,
            event_type="offer.accepted",
            entity_type="offer",
            entity_id=offer.id,
            context=context,
            before=before,
            after=snapshot_model(offer),
            event_data={
                "rfp_id": rfp.id,
                "rfp_status_after": RFPStatus.CLOSED.value,
                "provider_id": offer.provider_id,
                "trip_id": trip.id,
            },
        )
        logger.info(f"🤝 OFFER_ACCEPTED: {offer.id} on RFP {rfp.id} (trip {trip.id})")
    return AuditedResult(value=offer, audit_entry=entry)


def reject_offer(
    session: Session,
    offer_id: str,
    context: AuditContext,
    reason: Optional[str] = None,
) -> AuditedResult[Offer]:
    """Trip owner declines an active offer"""
    with atomic_transaction(session):
        offer = get_offer(session, offer_id)
        trip = offer.rfp.trip
        ensure_owner(trip.user_id, context, "trip", trip.id)
        OfferStateValidator.ensure_transition(offer.status, OfferStatus.REJECTED, offer.id)

        before = snapshot_model(offer)
        result = session.execute(
            update(Offer)
            .where(Offer.id == offer.id, Offer.status == OfferStatus.ACTIVE.value)
            .values(status=OfferStatus.REJECTED.value)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError(f"Offer {offer.id} is no longer active", reason="offer_not_active")
        session.expire(offer)

        entry = audit_logger.append(
            session,
            event_type="offer.rejected",
            entity_type="offer",
            entity_id=offer.id,
            context=context,
            before=before,
            after=snapshot_model(offer),
            event_data={"reason": reason} if reason else None,
        )
        logger.info(f"👎 OFFER_REJECTED: {offer.id}")
    return AuditedResult(value=offer, audit_entry=entry)


def expire_offer(session: Session, offer_id: str, context: AuditContext,
                 now: Optional[datetime] = None) -> AuditedResult[bool]:
    """Mark an active offer past its deadline as expired; no-op if it moved on"""
    current = resolve_now(now)
    with atomic_transaction(session):
        offer = get_offer(session, offer_id)
        before = snapshot_model(offer)
        result = session.execute(
            update(Offer)
            .where(
                Offer.id == offer.id,
                Offer.status == OfferStatus.ACTIVE.value,
                Offer.expires_at <= current,
            )
            .values(status=OfferStatus.EXPIRED.value)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return AuditedResult(value=False, audit_entry=None)
        session.expire(offer)

        entry = audit_logger.append(
            session,
            event_type="offer.expired",
            entity_type="offer",
            entity_id=offer.id,
            context=context,
            before=before,
            after=snapshot_model(offer),
        )
        logger.info(f"⏰ OFFER_EXPIRED: {offer.id}")
    return AuditedResult(value=True, audit_entry=entry)
