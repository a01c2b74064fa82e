"""
Lifecycle State Transition Validators
=====================================

Pure transition tables for every stateful entity. Services consult these
before issuing any write, so an illegal edge is rejected with a
StateTransitionError (a ConflictError) and nothing is persisted.

Booking:  hold -> confirmed -> refunded
          hold -> cancelled
Trip:     planning -> ready -> booked -> completed (forward skips allowed),
          any open state -> cancelled
Offer:    active -> accepted | rejected | expired
RFP:      active -> closed | expired
KYC:      pending -> verified | rejected, rejected -> pending, verified -> rejected
Photo:    pending -> approved | rejected
"""

import logging
from enum import Enum
from typing import Dict, Optional, Set, Tuple, Type, Union

from models import (
    BookingStatus, TripStatus, OfferStatus, RFPStatus, KYCStatus, PhotoVerificationStatus
)
from utils.exceptions import StateTransitionError

logger = logging.getLogger(__name__)

StatusLike = Union[str, Enum, None]


class BaseStateValidator:
    """Table-driven validator; subclasses supply the enum and the edges"""

    ENTITY_TYPE = "entity"
    STATUS_ENUM: Type[Enum]
    VALID_TRANSITIONS: Dict[Enum, Set[Enum]] = {}
    TERMINAL_STATES: Set[Enum] = set()

    @classmethod
    def _coerce(cls, status: StatusLike) -> Optional[Enum]:
        if status is None or isinstance(status, cls.STATUS_ENUM):
            return status
        return cls.STATUS_ENUM(status.value if isinstance(status, Enum) else status)

    @classmethod
    def is_valid_transition(cls, from_status: StatusLike, to_status: StatusLike) -> bool:
        try:
            is_valid, _ = cls.validate_transition(from_status, to_status)
        except ValueError:
            return False
        return is_valid

    @classmethod
    def validate_transition(
        cls,
        from_status: StatusLike,
        to_status: StatusLike,
        entity_id: Optional[str] = None,
    ) -> Tuple[bool, str]:
        """
        Validate if a state transition is allowed.

        Returns:
            Tuple[bool, str]: (is_valid, reason)
        """
        source = cls._coerce(from_status)
        target = cls._coerce(to_status)
        ref = f"{cls.ENTITY_TYPE} {entity_id}" if entity_id else cls.ENTITY_TYPE

        if source is None or target is None:
            return False, f"{ref}: missing status"
        if source == target:
            return False, f"{ref}: already {target.value}"
        if source in cls.TERMINAL_STATES:
            return False, f"{ref}: {source.value} is terminal"

        allowed = cls.VALID_TRANSITIONS.get(source, set())
        if target not in allowed:
            allowed_values = sorted(s.value for s in allowed)
            return False, f"{ref}: {source.value} -> {target.value} not allowed (allowed: {allowed_values})"
        return True, f"{ref}: {source.value} -> {target.value}"

    @classmethod
    def ensure_transition(cls, from_status: StatusLike, to_status: StatusLike, entity_id: Optional[str] = None):
        """Raise StateTransitionError unless the edge is legal"""
        is_valid, reason = cls.validate_transition(from_status, to_status, entity_id)
        if not is_valid:
            logger.warning(f"🚫 TRANSITION_BLOCKED: {reason}")
            source = cls._coerce(from_status)
            target = cls._coerce(to_status)
            raise StateTransitionError(
                cls.ENTITY_TYPE,
                entity_id,
                source.value if source is not None else None,
                target.value if target is not None else None,
            )
        logger.debug(f"✅ TRANSITION_OK: {reason}")


class BookingStateValidator(BaseStateValidator):
    ENTITY_TYPE = "booking"
    STATUS_ENUM = BookingStatus
    VALID_TRANSITIONS = {
        BookingStatus.HOLD: {BookingStatus.CONFIRMED, BookingStatus.CANCELLED},
        BookingStatus.CONFIRMED: {BookingStatus.REFUNDED},
        BookingStatus.CANCELLED: set(),
        BookingStatus.REFUNDED: set(),
    }
    TERMINAL_STATES = {BookingStatus.CANCELLED, BookingStatus.REFUNDED}


class TripStateValidator(BaseStateValidator):
    ENTITY_TYPE = "trip"
    STATUS_ENUM = TripStatus
    VALID_TRANSITIONS = {
        TripStatus.PLANNING: {TripStatus.READY, TripStatus.BOOKED, TripStatus.COMPLETED, TripStatus.CANCELLED},
        TripStatus.READY: {TripStatus.BOOKED, TripStatus.COMPLETED, TripStatus.CANCELLED},
        TripStatus.BOOKED: {TripStatus.COMPLETED, TripStatus.CANCELLED},
        TripStatus.COMPLETED: set(),
        TripStatus.CANCELLED: set(),
    }
    TERMINAL_STATES = {TripStatus.COMPLETED, TripStatus.CANCELLED}
    OPEN_STATES = {TripStatus.PLANNING, TripStatus.READY, TripStatus.BOOKED}


class OfferStateValidator(BaseStateValidator):
    ENTITY_TYPE = "offer"
    STATUS_ENUM = OfferStatus
    VALID_TRANSITIONS = {
        OfferStatus.ACTIVE: {OfferStatus.ACCEPTED, OfferStatus.REJECTED, OfferStatus.EXPIRED},
    }
    TERMINAL_STATES = {OfferStatus.ACCEPTED, OfferStatus.REJECTED, OfferStatus.EXPIRED}


class RFPStateValidator(BaseStateValidator):
    ENTITY_TYPE = "rfp"
    STATUS_ENUM = RFPStatus
    VALID_TRANSITIONS = {
        RFPStatus.ACTIVE: {RFPStatus.CLOSED, RFPStatus.EXPIRED},
    }
    TERMINAL_STATES = {RFPStatus.CLOSED, RFPStatus.EXPIRED}


class KYCStateValidator(BaseStateValidator):
    ENTITY_TYPE = "provider"
    STATUS_ENUM = KYCStatus
    VALID_TRANSITIONS = {
        KYCStatus.PENDING: {KYCStatus.VERIFIED, KYCStatus.REJECTED},
        KYCStatus.VERIFIED: {KYCStatus.REJECTED},
        KYCStatus.REJECTED: {KYCStatus.PENDING},
    }


class PhotoVerificationStateValidator(BaseStateValidator):
    ENTITY_TYPE = "photo_verification"
    STATUS_ENUM = PhotoVerificationStatus
    VALID_TRANSITIONS = {
        PhotoVerificationStatus.PENDING: {PhotoVerificationStatus.APPROVED, PhotoVerificationStatus.REJECTED},
    }
    TERMINAL_STATES = {PhotoVerificationStatus.APPROVED, PhotoVerificationStatus.REJECTED}
