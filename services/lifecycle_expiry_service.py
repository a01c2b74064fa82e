"""
Lifecycle Expiry Service
========================

Periodic housekeeping outside the booking hold sweep:

- active offers and RFPs past their deadline become ``expired``
- trips whose every consent lapsed get ``pii_shared`` cleared
- booking idempotency rows past their 24h window are purged

Each entity change is its own transaction with its own audit row; conditional
UPDATEs make a concurrent acceptance or a fresh consent win over the sweep.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import delete, or_, select, func
from sqlalchemy.orm import Session

from config import Config
from models import RFP, Offer, Trip, ConsentRecord, BookingIdempotency, RFPStatus, OfferStatus
from services.audit_logger import AuditContext, audit_logger
from services.feature_flags import load_snapshot
from services.rfp_offer_service import expire_offer, expire_rfp
from services.trip_consent_service import reconcile_pii_shared
from utils.atomic_transactions import atomic_transaction
from utils.helpers import resolve_now

logger = logging.getLogger(__name__)

JOB_NAME = "lifecycle_expiry_sweep"


class LifecycleExpiryService:
    """Expire stale offers and RFPs, reconcile consent flags, purge idempotency keys"""

    def __init__(self, batch_size: Optional[int] = None):
        self.batch_size = batch_size or Config.SWEEP_BATCH_SIZE

    def _expired_offer_ids(self, session: Session, now: datetime) -> List[str]:
        stmt = (
            select(Offer.id)
            .where(Offer.status == OfferStatus.ACTIVE.value, Offer.expires_at <= now)
            .order_by(Offer.expires_at)
            .limit(self.batch_size)
        )
        return list(session.execute(stmt).scalars().all())

    def _expired_rfp_ids(self, session: Session, now: datetime) -> List[str]:
        stmt = (
            select(RFP.id)
            .where(RFP.status == RFPStatus.ACTIVE.value, RFP.expires_at <= now)
            .order_by(RFP.expires_at)
            .limit(self.batch_size)
        )
        return list(session.execute(stmt).scalars().all())

    def _lapsed_consent_trip_ids(self, session: Session, now: datetime) -> List[str]:
        active_consent = select(ConsentRecord.id).where(
            ConsentRecord.trip_id == Trip.id,
            ConsentRecord.revoked_at.is_(None),
            or_(ConsentRecord.expires_at.is_(None), ConsentRecord.expires_at > now),
        )
        stmt = (
            select(Trip.id)
            .where(Trip.pii_shared_flag.is_(True), ~active_consent.exists())
            .limit(self.batch_size)
        )
        return list(session.execute(stmt).scalars().all())

    def purge_idempotency_keys(self, session: Session, context: AuditContext, now: datetime) -> int:
        with atomic_transaction(session):
            expired = session.execute(
                select(func.count()).select_from(BookingIdempotency).where(BookingIdempotency.expires_at <= now)
            ).scalar_one()
            if not expired:
                return 0
            session.execute(
                delete(BookingIdempotency)
                .where(BookingIdempotency.expires_at <= now)
                .execution_options(synchronize_session=False)
            )
            audit_logger.append(
                session,
                event_type="booking_idempotency.purged",
                entity_type="booking_idempotency",
                entity_id=None,
                context=context,
                event_data={"purged": expired, "cutoff": now},
            )
        logger.info(f"🧹 IDEMPOTENCY_PURGED: {expired} expired keys removed")
        return expired

    def _run_each(self, ids: List[str], action: Callable, label: str, results: Dict[str, Any]) -> int:
        changed = 0
        for entity_id in ids:
            try:
                if action(entity_id).audit_entry is not None:
                    changed += 1
            except Exception as e:
                logger.error(f"❌ LIFECYCLE_SWEEP_ERROR: {label} {entity_id}: {e}")
                results["errors"].append({label: entity_id, "error": str(e)})
        return changed

    def sweep(
        self,
        session: Session,
        now: Optional[datetime] = None,
        context: Optional[AuditContext] = None,
    ) -> Dict[str, Any]:
        current = resolve_now(now)
        context = context or AuditContext.system(JOB_NAME, feature_flags=load_snapshot(session))
        results: Dict[str, Any] = {
            "offers_expired": 0,
            "rfps_expired": 0,
            "trips_reconciled": 0,
            "idempotency_keys_purged": 0,
            "errors": [],
        }

        offer_ids = self._expired_offer_ids(session, current)
        rfp_ids = self._expired_rfp_ids(session, current)
        trip_ids = self._lapsed_consent_trip_ids(session, current)
        session.commit()

        results["offers_expired"] = self._run_each(
            offer_ids, lambda oid: expire_offer(session, oid, context, current), "offer_id", results
        )
        results["rfps_expired"] = self._run_each(
            rfp_ids, lambda rid: expire_rfp(session, rid, context, current), "rfp_id", results
        )
        results["trips_reconciled"] = self._run_each(
            trip_ids, lambda tid: reconcile_pii_shared(session, tid, context, current), "trip_id", results
        )
        try:
            results["idempotency_keys_purged"] = self.purge_idempotency_keys(session, context, current)
        except Exception as e:
            logger.error(f"❌ LIFECYCLE_SWEEP_ERROR: idempotency purge: {e}")
            results["errors"].append({"idempotency_purge": True, "error": str(e)})

        logger.info(
            f"✅ LIFECYCLE_SWEEP_COMPLETE: offers={results['offers_expired']} rfps={results['rfps_expired']} "
            f"trips={results['trips_reconciled']} keys={results['idempotency_keys_purged']} "
            f"errors={len(results['errors'])}"
        )
        return results


def run_lifecycle_expiry_sweep(
    session_factory: Callable[[], Session],
    now: Optional[datetime] = None,
    batch_size: Optional[int] = None,
) -> Dict[str, Any]:
    session = session_factory()
    try:
        return LifecycleExpiryService(batch_size).sweep(session, now=now)
    finally:
        session.close()
