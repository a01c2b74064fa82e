"""
Hold Expiry Service - cancels bookings whose hold lapsed without confirmation

Each booking is handled in its own transaction with a conditional UPDATE
(still ``hold`` and past ``hold_expires_at``). A confirmation that wins the
race leaves zero affected rows, which is an expected no-op: no state change
and no audit row.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from config import Config
from models import Booking, BookingStatus, RefundStatus
from services.audit_logger import AuditContext, AuditedResult, audit_logger
from services.feature_flags import load_snapshot
from utils.atomic_transactions import atomic_transaction
from utils.helpers import resolve_now, snapshot_model
from utils.lifecycle_state_validators import BookingStateValidator

logger = logging.getLogger(__name__)

JOB_NAME = "hold_expiry_sweep"
HOLD_EXPIRED_REASON = "hold_expired"


class HoldExpiryService:
    """Sweep bookings stuck in hold past their deadline"""

    def __init__(self, batch_size: Optional[int] = None):
        self.batch_size = batch_size or Config.SWEEP_BATCH_SIZE

    def find_expired_holds(self, session: Session, now: datetime) -> List[str]:
        stmt = (
            select(Booking.id)
            .where(Booking.status == BookingStatus.HOLD.value, Booking.hold_expires_at <= now)
            .order_by(Booking.hold_expires_at)
            .limit(self.batch_size)
        )
        return list(session.execute(stmt).scalars().all())

    def expire_hold(
        self,
        session: Session,
        booking_id: str,
        context: AuditContext,
        now: Optional[datetime] = None,
    ) -> AuditedResult[bool]:
        """Cancel one expired hold; value is False when the booking moved on first"""
        current = resolve_now(now)
        with atomic_transaction(session):
            booking = session.get(Booking, booking_id)
            if booking is None:
                return AuditedResult(value=False, audit_entry=None)
            before = snapshot_model(booking)

            BookingStateValidator.ensure_transition(BookingStatus.HOLD, BookingStatus.CANCELLED, booking_id)
            result = session.execute(
                update(Booking)
                .where(
                    Booking.id == booking_id,
                    Booking.status == BookingStatus.HOLD.value,
                    Booking.hold_expires_at <= current,
                )
                .values(
                    status=BookingStatus.CANCELLED.value,
                    cancelled_at=current,
                    cancellation_reason=HOLD_EXPIRED_REASON,
                    refund_amount=0,
                    refund_status=RefundStatus.NOT_APPLICABLE.value,
                    refund_processed_at=current,
                    updated_at=current,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                logger.debug(f"⏭️ HOLD_SWEEP: booking {booking_id} no longer an expired hold, skipping")
                return AuditedResult(value=False, audit_entry=None)
            session.expire(booking)

            entry = audit_logger.append(
                session,
                event_type="booking.hold_expired",
                entity_type="booking",
                entity_id=booking_id,
                context=context,
                before=before,
                after=snapshot_model(booking),
                event_data={"reason": HOLD_EXPIRED_REASON, "hold_expires_at": before["hold_expires_at"]},
            )
            logger.info(f"⏰ HOLD_EXPIRED: booking {booking_id} cancelled (hold ended {before['hold_expires_at']})")
        return AuditedResult(value=True, audit_entry=entry)

    def sweep(
        self,
        session: Session,
        now: Optional[datetime] = None,
        context: Optional[AuditContext] = None,
    ) -> Dict[str, Any]:
        """
        Cancel every expired hold in one batch.

        A failure on one booking is recorded and the sweep moves on; the
        failed booking's transaction is rolled back in full.
        """
        current = resolve_now(now)
        context = context or AuditContext.system(JOB_NAME, feature_flags=load_snapshot(session))
        results: Dict[str, Any] = {"processed": 0, "cancelled": 0, "skipped": 0, "errors": []}

        booking_ids = self.find_expired_holds(session, current)
        session.commit()
        for booking_id in booking_ids:
            results["processed"] += 1
            try:
                outcome = self.expire_hold(session, booking_id, context, current)
            except Exception as e:
                logger.error(f"❌ HOLD_SWEEP_ERROR: booking {booking_id}: {e}")
                results["errors"].append({"booking_id": booking_id, "error": str(e)})
                continue
            if outcome.value:
                results["cancelled"] += 1
            else:
                results["skipped"] += 1

        if results["processed"]:
            logger.info(
                f"✅ HOLD_SWEEP_COMPLETE: {results['cancelled']} cancelled, "
                f"{results['skipped']} skipped, {len(results['errors'])} errors"
            )
        return results


def run_hold_expiry_sweep(
    session_factory: Callable[[], Session],
    now: Optional[datetime] = None,
    batch_size: Optional[int] = None,
) -> Dict[str, Any]:
    """Run one sweep with a fresh session from the factory"""
    session = session_factory()
    try:
        return HoldExpiryService(batch_size).sweep(session, now=now)
    finally:
        session.close()
