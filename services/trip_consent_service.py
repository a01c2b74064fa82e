"""
Trip & Consent Lifecycle
========================

Trips are created in ``planning`` by their owner and only move forward
(planning -> ready -> booked -> completed, skips allowed) apart from explicit
cancellation. Consent records release PII categories for a bounded time;
``pii_shared`` on the trip may only be true while at least one consent is
active.

Every mutation runs in one transaction together with exactly one audit row.
"""

import logging
from datetime import datetime, timedelta
from decimal import InvalidOperation
from typing import Any, Dict, Iterable, List, Optional, Set

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from config import Config
from models import (
    Trip, ConsentRecord, RFP, TripStatus, RFPStatus, AgeBracket, GenderType, TripType,
    BudgetBracket, ConsentCategory
)
from services.audit_logger import AuditContext, AuditedResult, audit_logger
from services.feature_flags import snapshot_for
from utils.atomic_transactions import atomic_transaction
from utils.exceptions import (
    ConflictError, NotFoundError, UnauthorizedError, ValidationFailedError
)
from utils.helpers import (
    generate_consent_token, json_safe, quantize_amount, resolve_now,
    snapshot_model, to_naive_utc
)
from utils.lifecycle_state_validators import TripStateValidator
from utils.pii_guard import validate_questionnaire

logger = logging.getLogger(__name__)

PROFILE_FIELDS = {
    "destination", "age_bracket", "gender", "party_size", "trip_type",
    "budget_bracket", "budget_per_person", "travel_start_at", "input_text",
}

_ENUM_FIELDS = {
    "age_bracket": AgeBracket,
    "gender": GenderType,
    "trip_type": TripType,
    "budget_bracket": BudgetBracket,
}


# ---------------------------------------------------------------------------
# Lookups and checks shared with the other lifecycle services
# ---------------------------------------------------------------------------

def get_trip(session: Session, trip_id: str) -> Trip:
    trip = session.get(Trip, trip_id)
    if trip is None:
        raise NotFoundError("trip", trip_id)
    return trip


def ensure_owner(owner_id: Optional[str], context: AuditContext, entity_type: str, entity_id: str,
                 allow_system: bool = False):
    """Raise UnauthorizedError unless the actor owns the entity"""
    if allow_system and context.is_system:
        return
    if not context.actor_id or context.actor_id != owner_id:
        logger.warning(
            f"🔒 OWNERSHIP_DENIED: actor {context.actor_id} on {entity_type} {entity_id}"
        )
        raise UnauthorizedError(
            f"Actor does not own {entity_type} {entity_id}",
            reason="not_owner",
            details={"entity_type": entity_type, "entity_id": str(entity_id)},
        )


CLOSED_TRIP_STATUSES = (TripStatus.CANCELLED.value, TripStatus.COMPLETED.value)


def ensure_trip_open(trip: Trip, action: str):
    """Raise ConflictError(trip_closed) when the trip is cancelled or completed"""
    if trip.status in CLOSED_TRIP_STATUSES:
        logger.warning(f"🚫 TRIP_CLOSED: {action} refused on trip {trip.id} ({trip.status})")
        raise ConflictError(
            f"Trip {trip.id} is {trip.status}; {action} not allowed",
            reason="trip_closed",
            details={"trip_status": trip.status},
        )


def is_consent_active(record: ConsentRecord, now: Optional[datetime] = None) -> bool:
    """True iff the consent is not revoked and, when it expires, not yet expired"""
    if record.revoked_at is not None:
        return False
    if record.expires_at is None:
        return True
    return resolve_now(now) < to_naive_utc(record.expires_at)


def get_consent(session: Session, consent_token: str) -> ConsentRecord:
    record = session.execute(
        select(ConsentRecord).where(ConsentRecord.consent_token == consent_token)
    ).scalar_one_or_none()
    if record is None:
        raise NotFoundError("consent", consent_token)
    return record


def is_token_active(session: Session, consent_token: str, now: Optional[datetime] = None) -> bool:
    """Resolve a consent token and report whether it is active at ``now``"""
    return is_consent_active(get_consent(session, consent_token), now)


def active_consents(trip: Trip, now: Optional[datetime] = None) -> List[ConsentRecord]:
    current = resolve_now(now)
    return [record for record in trip.consent_records if is_consent_active(record, current)]


def granted_categories(trip: Trip, now: Optional[datetime] = None) -> Set[str]:
    categories: Set[str] = set()
    for record in active_consents(trip, now):
        categories.update(record.pii_categories or [])
    return categories


def consent_snapshot(trip: Trip, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Active consents at decision time, recorded on audit rows"""
    return [
        {
            "consent_token": record.consent_token,
            "pii_categories": list(record.pii_categories or []),
            "expires_at": json_safe(record.expires_at),
        }
        for record in active_consents(trip, now)
    ]


# ---------------------------------------------------------------------------
# Profile validation
# ---------------------------------------------------------------------------

def _enum_value(enum_cls, value: Any, field: str) -> str:
    try:
        return enum_cls(value.value if hasattr(value, "value") else value).value
    except ValueError:
        allowed = [member.value for member in enum_cls]
        raise ValidationFailedError(
            f"Invalid {field}: {value!r}",
            reason="invalid_profile",
            details={"field": field, "allowed": allowed},
        )


def validate_trip_profile(profile: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Normalise an anonymized trip profile against its value domains"""
    profile = dict(profile or {})
    unknown = sorted(set(profile) - PROFILE_FIELDS)
    if unknown:
        raise ValidationFailedError(
            f"Unknown profile fields: {unknown}",
            reason="invalid_profile",
            details={"fields": unknown},
        )

    cleaned: Dict[str, Any] = {}
    for field, enum_cls in _ENUM_FIELDS.items():
        if profile.get(field) is not None:
            cleaned[field] = _enum_value(enum_cls, profile[field], field)

    party_size = profile.get("party_size", 1)
    if isinstance(party_size, bool) or not isinstance(party_size, int) or party_size < 1:
        raise ValidationFailedError(
            f"party_size must be a positive integer, got {party_size!r}",
            reason="invalid_profile",
            details={"field": "party_size"},
        )
    cleaned["party_size"] = party_size

    budget = profile.get("budget_per_person")
    if budget is not None:
        try:
            budget = quantize_amount(budget)
        except (InvalidOperation, ValueError):
            raise ValidationFailedError("budget_per_person must be numeric", reason="invalid_profile")
        if budget < 0:
            raise ValidationFailedError("budget_per_person cannot be negative", reason="invalid_profile")
        cleaned["budget_per_person"] = budget

    start = profile.get("travel_start_at")
    if start is not None:
        if not isinstance(start, datetime):
            raise ValidationFailedError("travel_start_at must be a datetime", reason="invalid_profile")
        cleaned["travel_start_at"] = to_naive_utc(start)

    destination = profile.get("destination") or Config.DEFAULT_DESTINATION
    if not isinstance(destination, str) or len(destination) > 100:
        raise ValidationFailedError("destination must be a short string", reason="invalid_profile")
    cleaned["destination"] = destination.strip()

    if profile.get("input_text") is not None:
        cleaned["input_text"] = str(profile["input_text"])
    return cleaned


def _validate_categories(categories: Iterable[str]) -> List[str]:
    if isinstance(categories, str) or not categories:
        raise ValidationFailedError("At least one consent category is required", reason="invalid_categories")
    allowed = {member.value for member in ConsentCategory}
    values = []
    for category in categories:
        value = category.value if isinstance(category, ConsentCategory) else category
        if value not in allowed:
            raise ValidationFailedError(
                f"Unknown consent category: {category!r}",
                reason="invalid_categories",
                details={"allowed": sorted(allowed)},
            )
        if value not in values:
            values.append(value)
    return values


# ---------------------------------------------------------------------------
# Trips
# ---------------------------------------------------------------------------

def create_trip(
    session: Session,
    profile: Optional[Dict[str, Any]],
    questionnaire: Optional[Dict[str, Any]],
    context: AuditContext,
) -> AuditedResult[Trip]:
    """
    Create a trip in ``planning`` owned by the acting user.

    Raises:
        FeatureDisabledError: trip creation (or the questionnaire flow) is off
        ValidationFailedError: profile or questionnaire is malformed
        UnauthorizedError: no user is acting
    """
    if not context.actor_id or context.is_system:
        raise UnauthorizedError("Trips are created by an authenticated user", reason="no_actor")

    flags = snapshot_for(context)
    flags.require("trip_creation_enabled", context.actor_id, context.segment)
    if questionnaire:
        flags.require("questionnaire_flow", context.actor_id, context.segment)

    cleaned_profile = validate_trip_profile(profile)
    cleaned_questionnaire = validate_questionnaire(questionnaire)

    with atomic_transaction(session):
        trip = Trip(
            user_id=context.actor_id,
            status=TripStatus.PLANNING.value,
            questionnaire_responses=cleaned_questionnaire,
            consent_tokens={},
            pii_shared_flag=False,
            feature_flags_snapshot=flags.to_dict(),
            trace_id=context.trace_id,
            **cleaned_profile,
        )
        session.add(trip)
        session.flush()

        entry = audit_logger.append(
            session,
            event_type="trip.created",
            entity_type="trip",
            entity_id=trip.id,
            context=context,
            before=None,
            after=snapshot_model(trip),
        )
        logger.info(f"🧳 TRIP_CREATED: {trip.id} for user {trip.user_id} (party of {trip.party_size})")
    return AuditedResult(value=trip, audit_entry=entry)


def update_questionnaire(
    session: Session,
    trip_id: str,
    responses: Dict[str, Any],
    context: AuditContext,
    merge: bool = True,
) -> AuditedResult[Trip]:
    """Owner updates questionnaire answers while the trip is still being planned"""
    snapshot_for(context).require("questionnaire_flow", context.actor_id, context.segment)
    cleaned = validate_questionnaire(responses)

    with atomic_transaction(session):
        trip = get_trip(session, trip_id)
        ensure_owner(trip.user_id, context, "trip", trip.id)
        if trip.status not in (TripStatus.PLANNING.value, TripStatus.READY.value):
            raise ConflictError(
                f"Trip {trip.id} is {trip.status}; questionnaire is locked",
                reason="trip_locked",
            )

        before = snapshot_model(trip)
        updated = dict(trip.questionnaire_responses or {}) if merge else {}
        updated.update(cleaned)
        validate_questionnaire(updated)
        trip.questionnaire_responses = updated
        session.flush()

        entry = audit_logger.append(
            session,
            event_type="trip.questionnaire_updated",
            entity_type="trip",
            entity_id=trip.id,
            context=context,
            before=before,
            after=snapshot_model(trip),
            event_data={"keys": sorted(cleaned)},
        )
    return AuditedResult(value=trip, audit_entry=entry)


def transition_trip(trip: Trip, to_status: TripStatus):
    """Apply a validated status change without auditing; callers audit the operation"""
    TripStateValidator.ensure_transition(trip.status, to_status, trip.id)
    trip.status = to_status.value


def advance_trip_status(
    session: Session,
    trip_id: str,
    new_status: TripStatus,
    context: AuditContext,
) -> AuditedResult[Trip]:
    """Move a trip forward; the owner or a system job may do so"""
    target = TripStatus(new_status.value if isinstance(new_status, TripStatus) else new_status)
    with atomic_transaction(session):
        trip = get_trip(session, trip_id)
        ensure_owner(trip.user_id, context, "trip", trip.id, allow_system=True)
        before = snapshot_model(trip)
        transition_trip(trip, target)
        session.flush()

        entry = audit_logger.append(
            session,
            event_type=f"trip.{target.value}",
            entity_type="trip",
            entity_id=trip.id,
            context=context,
            before=before,
            after=snapshot_model(trip),
        )
        logger.info(f"🧳 TRIP_STATUS: {trip.id} {before['status']} -> {trip.status}")
    return AuditedResult(value=trip, audit_entry=entry)


def cancel_trip(session: Session, trip_id: str, context: AuditContext) -> AuditedResult[Trip]:
    """Owner cancels a trip from any open state; its active RFPs close with it"""
    with atomic_transaction(session):
        trip = get_trip(session, trip_id)
        ensure_owner(trip.user_id, context, "trip", trip.id)
        before = snapshot_model(trip)
        transition_trip(trip, TripStatus.CANCELLED)

        rfp_ids = list(session.execute(
            select(RFP.id).where(RFP.trip_id == trip.id, RFP.status == RFPStatus.ACTIVE.value)
        ).scalars())
        closed_rfps = []
        for rfp_id in rfp_ids:
            closed = session.execute(
                update(RFP)
                .where(RFP.id == rfp_id, RFP.status == RFPStatus.ACTIVE.value)
                .values(status=RFPStatus.CLOSED.value)
                .execution_options(synchronize_session=False)
            )
            if closed.rowcount == 1:
                closed_rfps.append(rfp_id)
        for rfp in trip.rfps:
            session.expire(rfp)
        session.flush()

        entry = audit_logger.append(
            session,
            event_type="trip.cancelled",
            entity_type="trip",
            entity_id=trip.id,
            context=context,
            before=before,
            after=snapshot_model(trip),
            event_data={"rfps_closed": closed_rfps},
        )
        logger.info(f"🧳 TRIP_CANCELLED: {trip.id} ({len(closed_rfps)} RFPs closed)")
    return AuditedResult(value=trip, audit_entry=entry)


# ---------------------------------------------------------------------------
# Consent
# ---------------------------------------------------------------------------

def grant_consent(
    session: Session,
    trip_id: str,
    categories: Iterable[str],
    ttl: Optional[timedelta],
    context: AuditContext,
    now: Optional[datetime] = None,
) -> AuditedResult[ConsentRecord]:
    """
    Grant consent to share PII categories for a trip.

    Args:
        ttl: lifetime of the grant; None for a grant without expiry

    Raises:
        NotFoundError: trip does not exist
        ConflictError: trip is cancelled or completed
        ValidationFailedError: unknown categories or a non-positive ttl
    """
    values = _validate_categories(categories)
    if ttl is not None:
        if ttl <= timedelta(0):
            raise ValidationFailedError("Consent ttl must be positive", reason="invalid_ttl")
        if ttl > timedelta(hours=Config.MAX_CONSENT_TTL_HOURS):
            raise ValidationFailedError(
                f"Consent ttl exceeds {Config.MAX_CONSENT_TTL_HOURS} hours",
                reason="invalid_ttl",
            )
    current = resolve_now(now)

    with atomic_transaction(session):
        trip = get_trip(session, trip_id)
        ensure_owner(trip.user_id, context, "trip", trip.id)
        ensure_trip_open(trip, "consent grant")

        pii_before = trip.pii_shared_at(current)
        record = ConsentRecord(
            trip_id=trip.id,
            consent_token=generate_consent_token(),
            pii_categories=values,
            granted_at=current,
            expires_at=current + ttl if ttl is not None else None,
            trace_id=context.trace_id,
        )
        session.add(record)
        trip.consent_records.append(record)

        tokens = dict(trip.consent_tokens or {})
        tokens[record.consent_token] = values
        trip.consent_tokens = tokens
        _recompute_pii_shared(trip, current)
        session.flush()

        entry = audit_logger.append(
            session,
            event_type="consent.granted",
            entity_type="consent_record",
            entity_id=record.id,
            context=context,
            before=None,
            after=snapshot_model(record),
            event_data={
                "trip_id": trip.id,
                "pii_shared_before": pii_before,
                "pii_shared_after": trip.pii_shared_at(current),
            },
            consent_snapshot=consent_snapshot(trip, current),
        )
        logger.info(f"✅ CONSENT_GRANTED: trip {trip.id} categories={values} expires={record.expires_at}")
    return AuditedResult(value=record, audit_entry=entry)


def _recompute_pii_shared(trip: Trip, now: datetime) -> bool:
    """Store the flag with the instant the last active consent lapses"""
    active = active_consents(trip, now)
    expiries = [to_naive_utc(record.expires_at) for record in active]
    trip.pii_shared_flag = bool(active)
    trip.pii_shared_until = max(expiries) if active and None not in expiries else None
    return trip.pii_shared_at(now)


def revoke_consent(
    session: Session,
    consent_token: str,
    context: AuditContext,
    now: Optional[datetime] = None,
) -> AuditedResult[ConsentRecord]:
    """Revoke a consent token; once revoked it is never active again"""
    current = resolve_now(now)
    with atomic_transaction(session):
        record = get_consent(session, consent_token)
        trip = record.trip
        ensure_owner(trip.user_id, context, "trip", trip.id)
        if record.revoked_at is not None:
            raise ConflictError("Consent already revoked", reason="consent_revoked")

        before = snapshot_model(record)
        record.revoked_at = current
        tokens = dict(trip.consent_tokens or {})
        tokens.pop(record.consent_token, None)
        trip.consent_tokens = tokens
        pii_before = trip.pii_shared_at(current)
        pii_after = _recompute_pii_shared(trip, current)
        session.flush()

        entry = audit_logger.append(
            session,
            event_type="consent.revoked",
            entity_type="consent_record",
            entity_id=record.id,
            context=context,
            before=before,
            after=snapshot_model(record),
            event_data={
                "trip_id": trip.id,
                "pii_shared_before": pii_before,
                "pii_shared_after": pii_after,
            },
            consent_snapshot=consent_snapshot(trip, current),
        )
        logger.info(f"🚫 CONSENT_REVOKED: trip {trip.id} pii_shared={pii_after}")
    return AuditedResult(value=record, audit_entry=entry)


def reconcile_pii_shared(
    session: Session,
    trip_id: str,
    context: AuditContext,
    now: Optional[datetime] = None,
) -> AuditedResult[bool]:
    """
    Clear the stored ``pii_shared`` flag once every consent on the trip has
    lapsed. Reads already see False after the lapse; this keeps the stored
    row and the audit trail in line with them.

    Returns the resulting flag; audit_entry is None when nothing changed.
    """
    current = resolve_now(now)
    with atomic_transaction(session):
        trip = get_trip(session, trip_id)
        if not trip.pii_shared_flag or active_consents(trip, current):
            return AuditedResult(value=trip.pii_shared_at(current), audit_entry=None)

        before = snapshot_model(trip)
        trip.pii_shared_flag = False
        trip.pii_shared_until = None
        session.flush()
        entry = audit_logger.append(
            session,
            event_type="trip.pii_shared_cleared",
            entity_type="trip",
            entity_id=trip.id,
            context=context,
            before=before,
            after=snapshot_model(trip),
            event_data={"reason": "consent_lapsed"},
        )
        logger.info(f"🔐 PII_SHARED_CLEARED: trip {trip.id} has no active consent")
    return AuditedResult(value=False, audit_entry=entry)
