"""
Photo Verification
==================

Travellers attach photo evidence to a trip. An automated check scores each
photo; scores at or above Config.PHOTO_REVIEW_CONFIDENCE_THRESHOLD approve it
directly, anything lower stays pending with manual review required until a
reviewer decides.

GPS coordinates and capture time are taken from EXIF when present. Both the
decimal form (``GPSLatitude: 15.49``) and the degrees/minutes/seconds form
with hemisphere refs (``GPSLatitude: [15, 29, 24.0]``, ``GPSLatitudeRef: N``)
are understood.
"""

import hashlib
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlparse

from sqlalchemy.orm import Session

from config import Config
from models import PhotoVerification, PhotoVerificationStatus, TripStatus
from services.audit_logger import AuditContext, AuditedResult, audit_logger
from services.feature_flags import snapshot_for
from services.trip_consent_service import ensure_owner, get_trip
from utils.atomic_transactions import atomic_transaction
from utils.exceptions import (
    ConflictError, NotFoundError, UnauthorizedError, ValidationFailedError
)
from utils.helpers import json_safe, resolve_now, snapshot_model
from utils.lifecycle_state_validators import PhotoVerificationStateValidator

logger = logging.getLogger(__name__)

EXIF_DATETIME_FORMAT = "%Y:%m:%d %H:%M:%S"
MAX_PHOTO_URL_LENGTH = 500


def compute_photo_hash(photo_bytes: bytes) -> str:
    return hashlib.sha256(photo_bytes).hexdigest()


def _dms_to_decimal(value: Any) -> float:
    if isinstance(value, (list, tuple)):
        parts = [float(part) for part in value] + [0.0, 0.0]
        degrees, minutes, seconds = parts[:3]
        return degrees + minutes / 60 + seconds / 3600
    return float(value)


def _coordinate(exif: Dict[str, Any], key: str, negative_ref: str, limit: float) -> Optional[float]:
    raw = exif.get(key)
    if raw is None:
        return None
    try:
        value = _dms_to_decimal(raw)
    except (TypeError, ValueError):
        raise ValidationFailedError(f"EXIF {key} is not a coordinate", reason="invalid_exif")
    ref = str(exif.get(f"{key}Ref", "")).strip().upper()
    if ref == negative_ref:
        value = -abs(value)
    if not -limit <= value <= limit:
        raise ValidationFailedError(f"EXIF {key} out of range: {value}", reason="invalid_exif")
    return round(value, 6)


def extract_gps(exif_data: Optional[Dict[str, Any]]) -> Tuple[Optional[float], Optional[float]]:
    """(latitude, longitude) from EXIF, or (None, None) when either is missing"""
    if not exif_data:
        return None, None
    gps = exif_data.get("GPSInfo") if isinstance(exif_data.get("GPSInfo"), dict) else exif_data
    latitude = _coordinate(gps, "GPSLatitude", "S", 90)
    longitude = _coordinate(gps, "GPSLongitude", "W", 180)
    if latitude is None or longitude is None:
        return None, None
    return latitude, longitude


def extract_timestamp(exif_data: Optional[Dict[str, Any]]) -> Optional[datetime]:
    if not exif_data:
        return None
    raw = exif_data.get("DateTimeOriginal") or exif_data.get("DateTime")
    if not raw:
        return None
    try:
        return datetime.strptime(str(raw), EXIF_DATETIME_FORMAT)
    except ValueError:
        logger.warning(f"⚠️ PHOTO_EXIF: unparseable capture time {raw!r}, ignoring")
        return None


def get_verification(session: Session, verification_id: str) -> PhotoVerification:
    verification = session.get(PhotoVerification, verification_id)
    if verification is None:
        raise NotFoundError("photo_verification", verification_id)
    return verification


def submit_photo(
    session: Session,
    trip_id: str,
    photo_url: str,
    context: AuditContext,
    exif_data: Optional[Dict[str, Any]] = None,
    photo_bytes: Optional[bytes] = None,
    device_attestation: Optional[Dict[str, Any]] = None,
) -> AuditedResult[PhotoVerification]:
    """Attach a photo to the actor's trip in ``pending``"""
    snapshot_for(context).require("photo_verification", context.actor_id, context.segment)

    parsed = urlparse(photo_url or "")
    if parsed.scheme not in ("http", "https") or not parsed.netloc or len(photo_url) > MAX_PHOTO_URL_LENGTH:
        raise ValidationFailedError("photo_url must be an http(s) URL", reason="invalid_photo_url")
    if exif_data is not None and not isinstance(exif_data, dict):
        raise ValidationFailedError("exif_data must be a mapping", reason="invalid_exif")

    latitude, longitude = extract_gps(exif_data)
    taken_at = extract_timestamp(exif_data)

    with atomic_transaction(session):
        trip = get_trip(session, trip_id)
        ensure_owner(trip.user_id, context, "trip", trip.id)
        if trip.status == TripStatus.CANCELLED.value:
            raise ConflictError(f"Trip {trip.id} is cancelled", reason="trip_closed")

        verification = PhotoVerification(
            trip_id=trip.id,
            user_id=trip.user_id,
            photo_url=photo_url,
            photo_hash=compute_photo_hash(photo_bytes) if photo_bytes is not None else None,
            exif_data=json_safe(exif_data) if exif_data is not None else None,
            gps_latitude=latitude,
            gps_longitude=longitude,
            timestamp_taken=taken_at,
            verification_status=PhotoVerificationStatus.PENDING.value,
            manual_review_required=False,
            device_attestation=json_safe(device_attestation) if device_attestation is not None else None,
            trace_id=context.trace_id,
        )
        session.add(verification)
        session.flush()

        entry = audit_logger.append(
            session,
            event_type="photo.submitted",
            entity_type="photo_verification",
            entity_id=verification.id,
            context=context,
            after=snapshot_model(verification),
            event_data={"trip_id": trip.id, "has_gps": latitude is not None},
        )
        logger.info(f"📷 PHOTO_SUBMITTED: {verification.id} for trip {trip.id}")
    return AuditedResult(value=verification, audit_entry=entry)


def record_automated_result(
    session: Session,
    verification_id: str,
    confidence: float,
    context: AuditContext,
    now: Optional[datetime] = None,
) -> AuditedResult[PhotoVerification]:
    """
    Store the automated confidence score.

    Approves at or above the review threshold; otherwise the photo stays
    pending and is flagged for manual review.
    """
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float, Decimal)) or not 0 <= confidence <= 1:
        raise ValidationFailedError(f"confidence must be within [0, 1], got {confidence!r}", reason="invalid_confidence")
    current = resolve_now(now)
    threshold = Config.PHOTO_REVIEW_CONFIDENCE_THRESHOLD

    with atomic_transaction(session):
        verification = get_verification(session, verification_id)
        if verification.manual_review_required or verification.confidence_score is not None:
            raise ConflictError(
                f"Photo {verification.id} already has an automated result",
                reason="already_scored",
            )
        if verification.verification_status != PhotoVerificationStatus.PENDING.value:
            raise ConflictError(
                f"Photo {verification.id} is {verification.verification_status}",
                reason="illegal_transition",
            )
        before = snapshot_model(verification)
        score = Decimal(str(confidence)).quantize(Decimal("0.01"))
        verification.confidence_score = score

        if float(confidence) >= threshold:
            PhotoVerificationStateValidator.ensure_transition(
                verification.verification_status, PhotoVerificationStatus.APPROVED, verification.id
            )
            verification.verification_status = PhotoVerificationStatus.APPROVED.value
            verification.approved_by = context.actor_id
            verification.approved_at = current
            event_type = "photo.auto_approved"
        else:
            verification.manual_review_required = True
            event_type = "photo.manual_review_requested"
        session.flush()

        entry = audit_logger.append(
            session,
            event_type=event_type,
            entity_type="photo_verification",
            entity_id=verification.id,
            context=context,
            before=before,
            after=snapshot_model(verification),
            event_data={"confidence": score, "threshold": threshold},
        )
        logger.info(f"📷 PHOTO_SCORED: {verification.id} confidence={score} threshold={threshold:.2f} -> {event_type}")
    return AuditedResult(value=verification, audit_entry=entry)


def complete_manual_review(
    session: Session,
    verification_id: str,
    approve: bool,
    context: AuditContext,
    now: Optional[datetime] = None,
) -> AuditedResult[PhotoVerification]:
    """Reviewer approves or rejects a photo flagged for manual review"""
    current = resolve_now(now)
    with atomic_transaction(session):
        verification = get_verification(session, verification_id)
        if not verification.manual_review_required:
            raise ConflictError(
                f"Photo {verification.id} is not awaiting manual review",
                reason="not_in_manual_review",
            )
        if not context.actor_id or context.actor_id == verification.user_id:
            raise UnauthorizedError("Photos cannot be reviewed by their owner", reason="self_review")

        target = PhotoVerificationStatus.APPROVED if approve else PhotoVerificationStatus.REJECTED
        PhotoVerificationStateValidator.ensure_transition(verification.verification_status, target, verification.id)
        before = snapshot_model(verification)
        verification.verification_status = target.value
        verification.manual_review_required = False
        verification.approved_by = context.actor_id
        verification.approved_at = current if approve else None
        session.flush()

        entry = audit_logger.append(
            session,
            event_type=f"photo.{target.value}",
            entity_type="photo_verification",
            entity_id=verification.id,
            context=context,
            before=before,
            after=snapshot_model(verification),
            event_data={"manual_review": True},
        )
        logger.info(f"📷 PHOTO_REVIEWED: {verification.id} -> {target.value} by {context.actor_id}")
    return AuditedResult(value=verification, audit_entry=entry)
