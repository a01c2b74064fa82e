"""
GoaGuide Booking & Consent Lifecycle - Database Schema
=====================================================

Relational model for the trip → RFP → offer → booking lifecycle:
- Trips carrying anonymized traveller profiles and questionnaire answers
- Consent records gating what personal data may leave the platform
- Provider bids (RFPs and offers) and the bookings created from them
- Booking idempotency records for at-most-once creation under retries
- Photo verification results
- An append-only audit trail and process-wide feature flags

All timestamps are naive UTC. JSON columns are JSONB on PostgreSQL.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Boolean, Text, Float,
    ForeignKey, Index, CheckConstraint, JSON, text, and_, or_
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.hybrid import hybrid_property
from sqlalchemy.orm import DeclarativeBase, relationship
from utils.helpers import resolve_now, utcnow


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# JSONB where available, generic JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def generate_uuid() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return utcnow()


def _check_in(column: str, enum_cls) -> str:
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return f"{column} IN ({values})"


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class TripStatus(Enum):
    """Trip lifecycle states (forward-only, cancellation from any open state)"""
    PLANNING = "planning"
    READY = "ready"
    BOOKED = "booked"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class BookingStatus(Enum):
    """Booking lifecycle states"""
    HOLD = "hold"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class GenderType(Enum):
    MALE = "male"
    FEMALE = "female"
    OTHER = "other"
    PREFER_NOT_TO_SAY = "prefer_not_to_say"


class TripType(Enum):
    FAMILY = "family"
    SOLO = "solo"
    COUPLE = "couple"
    FRIENDS = "friends"
    BUSINESS = "business"
    ADVENTURE = "adventure"


class AgeBracket(Enum):
    AGE_18_25 = "18-25"
    AGE_26_35 = "26-35"
    AGE_36_45 = "36-45"
    AGE_46_55 = "46-55"
    AGE_55_PLUS = "55+"


class BudgetBracket(Enum):
    BUDGET = "budget"
    MID_RANGE = "mid_range"
    LUXURY = "luxury"


class KYCStatus(Enum):
    """Provider identity verification status"""
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class RFPStatus(Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    CLOSED = "closed"


class OfferStatus(Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class RefundStatus(Enum):
    """Refund outcome recorded on cancelled/refunded bookings"""
    NOT_APPLICABLE = "not_applicable"  # Hold cancelled before any payment
    PROCESSED = "processed"


class PhotoVerificationStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ConsentCategory(Enum):
    """Categories of personal data a consent token may release"""
    CONTACT_INFO = "contact_info"
    DEMOGRAPHICS = "demographics"
    PREFERENCES = "preferences"
    LOCATION = "location"
    PHOTOS = "photos"


# ============================================================================
# TRIPS AND CONSENT
# ============================================================================

class Trip(Base):
    """A traveller's trip request with an anonymized profile"""
    __tablename__ = 'trips'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), nullable=False, index=True)
    destination = Column(String(100), nullable=False, default="Goa")
    status = Column(String(20), nullable=False, default=TripStatus.PLANNING.value)
    input_text = Column(Text, nullable=True)

    # Anonymized profile (privacy-first)
    age_bracket = Column(String(10), nullable=True)
    gender = Column(String(20), nullable=True)
    party_size = Column(Integer, nullable=False, default=1)
    trip_type = Column(String(20), nullable=True)
    budget_bracket = Column(String(20), nullable=True)
    budget_per_person = Column(Numeric(10, 2), nullable=True)
    travel_start_at = Column(DateTime, nullable=True)

    questionnaire_responses = Column(JSONType, nullable=False, default=dict)

    # Consent management
    consent_tokens = Column(JSONType, nullable=False, default=dict)  # token -> categories
    # Set with the latest expiry among active consents; NULL until means open-ended
    pii_shared_flag = Column("pii_shared", Boolean, nullable=False, default=False)
    pii_shared_until = Column(DateTime, nullable=True)

    # Metadata
    feature_flags_snapshot = Column(JSONType, nullable=False, default=dict)
    trace_id = Column(String(255), nullable=True, index=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    consent_records = relationship(
        "ConsentRecord", back_populates="trip", cascade="all, delete-orphan",
        order_by="ConsentRecord.granted_at"
    )
    rfps = relationship("RFP", back_populates="trip", cascade="all, delete-orphan")
    bookings = relationship("Booking", back_populates="trip")

    __table_args__ = (
        CheckConstraint(_check_in("status", TripStatus), name='ck_trip_status_valid'),
        CheckConstraint('party_size >= 1', name='ck_trip_party_size_positive'),
        Index('ix_trips_status', 'status'),
        Index('ix_trips_created_at', 'created_at'),
    )

    def pii_shared_at(self, now: Optional[datetime] = None) -> bool:
        """Whether PII is released at ``now``; a lapsed grant reads False before any sweep clears it"""
        if not self.pii_shared_flag:
            return False
        if self.pii_shared_until is None:
            return True
        return resolve_now(now) < self.pii_shared_until

    @hybrid_property
    def pii_shared(self) -> bool:
        return self.pii_shared_at()

    @pii_shared.expression
    def pii_shared(cls):
        return and_(
            cls.pii_shared_flag.is_(True),
            or_(cls.pii_shared_until.is_(None), cls.pii_shared_until > utcnow()),
        )

    def __repr__(self):
        return f"<Trip(id={self.id}, status={self.status}, pii_shared={self.pii_shared})>"


class ConsentRecord(Base):
    """Grant to share specific PII categories for a trip"""
    __tablename__ = 'consent_records'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    trip_id = Column(String(36), ForeignKey('trips.id', ondelete='CASCADE'), nullable=False, index=True)
    consent_token = Column(String(255), unique=True, nullable=False)
    pii_categories = Column(JSONType, nullable=False)
    granted_at = Column(DateTime, nullable=False, default=utc_now)
    expires_at = Column(DateTime, nullable=True)
    revoked_at = Column(DateTime, nullable=True)
    trace_id = Column(String(255), nullable=True)

    trip = relationship("Trip", back_populates="consent_records")

    __table_args__ = (
        Index('ix_consent_records_expires', 'expires_at'),
    )

    def __repr__(self):
        return f"<ConsentRecord(token={self.consent_token}, revoked={self.revoked_at is not None})>"


# ============================================================================
# PROVIDERS, RFPS AND OFFERS
# ============================================================================

class Provider(Base):
    """Vendor able to bid on RFPs once KYC-verified"""
    __tablename__ = 'providers'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    business_name = Column(String(255), nullable=False)
    contact_email = Column(String(255), nullable=False)
    phone = Column(String(20), nullable=True)
    address = Column(Text, nullable=True)

    kyc_status = Column(String(20), nullable=False, default=KYCStatus.PENDING.value)
    kyc_documents = Column(JSONType, nullable=False, default=dict)
    verification_date = Column(DateTime, nullable=True)

    rating = Column(Numeric(3, 2), nullable=False, default=0)
    total_bookings = Column(Integer, nullable=False, default=0)
    active = Column(Boolean, nullable=False, default=True)

    extra_data = Column("metadata", JSONType, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    offers = relationship("Offer", back_populates="provider")

    __table_args__ = (
        CheckConstraint(_check_in("kyc_status", KYCStatus), name='ck_provider_kyc_status_valid'),
        CheckConstraint('rating >= 0 AND rating <= 5', name='ck_provider_rating_range'),
    )

    def __repr__(self):
        return f"<Provider(id={self.id}, kyc_status={self.kyc_status}, active={self.active})>"


class RFP(Base):
    """Anonymized request for proposals derived from a trip"""
    __tablename__ = 'rfps'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    trip_id = Column(String(36), ForeignKey('trips.id', ondelete='CASCADE'), nullable=False, index=True)

    # Anonymized requirements only
    anonymized_requirements = Column(JSONType, nullable=False)
    budget_range = Column(JSONType, nullable=False)

    expires_at = Column(DateTime, nullable=False)
    status = Column(String(20), nullable=False, default=RFPStatus.ACTIVE.value)

    trace_id = Column(String(255), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)

    trip = relationship("Trip", back_populates="rfps")
    offers = relationship("Offer", back_populates="rfp", cascade="all, delete-orphan")

    __table_args__ = (
        CheckConstraint(_check_in("status", RFPStatus), name='ck_rfp_status_valid'),
        Index('ix_rfps_status_expires', 'status', 'expires_at'),
    )

    def __repr__(self):
        return f"<RFP(id={self.id}, status={self.status})>"


class Offer(Base):
    """Provider bid against an RFP"""
    __tablename__ = 'offers'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    rfp_id = Column(String(36), ForeignKey('rfps.id', ondelete='CASCADE'), nullable=False, index=True)
    provider_id = Column(String(36), ForeignKey('providers.id', ondelete='CASCADE'), nullable=False, index=True)

    price = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="INR")
    description = Column(Text, nullable=True)
    inclusions = Column(JSONType, nullable=False, default=dict)

    validity_hours = Column(Integer, nullable=False, default=24)
    status = Column(String(20), nullable=False, default=OfferStatus.ACTIVE.value)
    expires_at = Column(DateTime, nullable=True)

    trace_id = Column(String(255), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)

    rfp = relationship("RFP", back_populates="offers")
    provider = relationship("Provider", back_populates="offers")
    booking = relationship("Booking", back_populates="offer", uselist=False)

    __table_args__ = (
        CheckConstraint(_check_in("status", OfferStatus), name='ck_offer_status_valid'),
        CheckConstraint('price > 0', name='ck_offer_price_positive'),
        CheckConstraint('validity_hours > 0', name='ck_offer_validity_positive'),
        # At most one accepted offer per RFP
        Index(
            'uq_offers_one_accepted_per_rfp', 'rfp_id', unique=True,
            sqlite_where=text("status = 'accepted'"),
            postgresql_where=text("status = 'accepted'"),
        ),
        Index('ix_offers_status_expires', 'status', 'expires_at'),
    )

    def __repr__(self):
        return f"<Offer(id={self.id}, price={self.price} {self.currency}, status={self.status})>"


# ============================================================================
# BOOKINGS
# ============================================================================

class Booking(Base):
    """Booking created from an accepted offer"""
    __tablename__ = 'bookings'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    trip_id = Column(String(36), ForeignKey('trips.id', ondelete='CASCADE'), nullable=False, index=True)
    offer_id = Column(String(36), ForeignKey('offers.id'), unique=True, nullable=False)
    user_id = Column(String(36), nullable=False, index=True)
    provider_id = Column(String(36), ForeignKey('providers.id'), nullable=False)

    status = Column(String(20), nullable=False, default=BookingStatus.HOLD.value)
    # Fixed at hold time
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="INR")

    payment_token = Column(String(255), nullable=True)
    payment_method = Column(String(50), nullable=True)

    hold_expires_at = Column(DateTime, nullable=True)
    confirmed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(String(50), nullable=True)

    refund_amount = Column(Numeric(10, 2), nullable=True)
    refund_status = Column(String(20), nullable=True)
    refund_processed_at = Column(DateTime, nullable=True)

    trace_id = Column(String(255), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    trip = relationship("Trip", back_populates="bookings")
    offer = relationship("Offer", back_populates="booking")

    __table_args__ = (
        CheckConstraint(_check_in("status", BookingStatus), name='ck_booking_status_valid'),
        CheckConstraint('amount > 0', name='ck_booking_amount_positive'),
        CheckConstraint('refund_amount IS NULL OR refund_amount >= 0', name='ck_booking_refund_non_negative'),
        Index('ix_bookings_status', 'status'),
        Index('ix_bookings_status_hold_expires', 'status', 'hold_expires_at'),
    )

    def __repr__(self):
        return f"<Booking(id={self.id}, status={self.status}, amount={self.amount} {self.currency})>"


class BookingIdempotency(Base):
    """Cached booking-creation response keyed by client idempotency key"""
    __tablename__ = 'booking_idempotency'

    idempotency_key = Column(String(255), primary_key=True)
    booking_id = Column(String(36), ForeignKey('bookings.id'), nullable=True)
    request_hash = Column(String(64), nullable=False)
    response_data = Column(JSONType, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    expires_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index('ix_booking_idempotency_expires', 'expires_at'),
    )

    def __repr__(self):
        return f"<BookingIdempotency(key={self.idempotency_key}, booking_id={self.booking_id})>"


# ============================================================================
# PHOTO VERIFICATION
# ============================================================================

class PhotoVerification(Base):
    """Photo evidence attached to a trip and its verification outcome"""
    __tablename__ = 'photo_verifications'

    id = Column(String(36), primary_key=True, default=generate_uuid)
    trip_id = Column(String(36), ForeignKey('trips.id', ondelete='CASCADE'), nullable=False, index=True)
    user_id = Column(String(36), nullable=False, index=True)

    photo_url = Column(String(500), nullable=False)
    photo_hash = Column(String(64), nullable=True)

    exif_data = Column(JSONType, nullable=True)
    gps_latitude = Column(Float, nullable=True)
    gps_longitude = Column(Float, nullable=True)
    timestamp_taken = Column(DateTime, nullable=True)

    verification_status = Column(String(20), nullable=False, default=PhotoVerificationStatus.PENDING.value)
    confidence_score = Column(Numeric(3, 2), nullable=True)
    manual_review_required = Column(Boolean, nullable=False, default=False)
    approved_by = Column(String(36), nullable=True)
    approved_at = Column(DateTime, nullable=True)

    device_attestation = Column(JSONType, nullable=True)

    trace_id = Column(String(255), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)

    __table_args__ = (
        CheckConstraint(
            _check_in("verification_status", PhotoVerificationStatus),
            name='ck_photo_verification_status_valid'
        ),
        CheckConstraint(
            'confidence_score IS NULL OR (confidence_score >= 0 AND confidence_score <= 1)',
            name='ck_photo_confidence_range'
        ),
    )


# ============================================================================
# AUDIT AND FEATURE FLAGS
# ============================================================================

class AuditLog(Base):
    """Append-only audit trail; rows are never updated or deleted"""
    __tablename__ = 'audit_log'

    # Insertion order; audit_id is the public identifier
    id = Column(Integer, primary_key=True, autoincrement=True)
    audit_id = Column(String(36), unique=True, nullable=False, default=generate_uuid)

    # Event identification
    event_type = Column(String(100), nullable=False, index=True)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(100), nullable=True)

    # Actor and request context
    user_id = Column(String(36), nullable=True)
    session_id = Column(String(255), nullable=True)
    trace_id = Column(String(255), nullable=True)
    request_id = Column(String(255), nullable=True)
    ip_address = Column(String(45), nullable=True)  # IPv6 compatible
    user_agent = Column(Text, nullable=True)

    # Event data
    event_data = Column(JSONType, nullable=False, default=dict)
    before_state = Column(JSONType, nullable=True)
    after_state = Column(JSONType, nullable=True)
    feature_flags_snapshot = Column(JSONType, nullable=True)
    consent_snapshot = Column(JSONType, nullable=True)

    service_name = Column(String(50), nullable=True)
    service_version = Column(String(20), nullable=True)

    created_at = Column(DateTime, nullable=False, default=utc_now)

    __table_args__ = (
        Index('ix_audit_log_entity', 'entity_type', 'entity_id'),
        Index('ix_audit_log_user', 'user_id'),
        Index('ix_audit_log_trace', 'trace_id'),
        Index('ix_audit_log_created_at', 'created_at'),
    )

    def __repr__(self):
        return f"<AuditLog(id={self.id}, event_type={self.event_type}, entity={self.entity_type}:{self.entity_id})>"


class FeatureFlag(Base):
    """Named switch gating optional behaviour, with percentage rollout"""
    __tablename__ = 'feature_flags'

    name = Column(String(100), primary_key=True)
    enabled = Column(Boolean, nullable=False, default=False)
    rollout_percentage = Column(Integer, nullable=False, default=0)
    user_segments = Column(JSONType, nullable=False, default=list)
    description = Column(Text, nullable=True)
    created_by = Column(String(36), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        CheckConstraint(
            'rollout_percentage >= 0 AND rollout_percentage <= 100',
            name='ck_feature_flag_rollout_range'
        ),
    )

    def __repr__(self):
        return f"<FeatureFlag(name={self.name}, enabled={self.enabled}, rollout={self.rollout_percentage}%)>"
