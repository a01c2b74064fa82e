"""
Audit log tests: rows are append-only, carry the request context and vanish
with a rolled-back operation.
"""

import pytest

from models import AuditLog, Trip
from services.audit_logger import AuditContext, audit_logger
from services.feature_flags import FeatureFlagSnapshot
from services.trip_consent_service import create_trip
from utils.atomic_transactions import atomic_transaction
from utils.exceptions import ConflictError


class TestAuditImmutability:

    def test_update_rejected(self, db_session, planning_trip):
        entry = audit_logger.for_entity(db_session, "trip", planning_trip.id)[0]
        entry.event_type = "trip.rewritten"
        with pytest.raises(ConflictError) as exc_info:
            db_session.flush()
        assert exc_info.value.reason == "audit_immutable"
        db_session.rollback()

    def test_delete_rejected(self, db_session, planning_trip):
        entry = audit_logger.for_entity(db_session, "trip", planning_trip.id)[0]
        db_session.delete(entry)
        with pytest.raises(ConflictError):
            db_session.flush()
        db_session.rollback()
        assert audit_logger.count(db_session) == 1


class TestAuditContents:

    def test_context_is_recorded(self, db_session, planning_trip, client_context):
        entry = audit_logger.for_entity(db_session, "trip", planning_trip.id)[0]
        assert entry.user_id == client_context.actor_id
        assert entry.trace_id == client_context.trace_id
        assert entry.request_id == client_context.request_id
        assert entry.ip_address == "203.0.113.10"
        assert entry.feature_flags_snapshot["provider_rfp"]["enabled"] is True
        assert entry.service_name

    def test_context_metadata_lands_in_event_data(self, db_session, client_context):
        context = AuditContext(
            actor_id=client_context.actor_id,
            trace_id="trace-meta",
            feature_flags=client_context.feature_flags,
            metadata={"channel": "web"},
        )
        result = create_trip(db_session, {}, None, context)
        assert result.audit_entry.event_data["context"] == {"channel": "web"}

    def test_context_without_flags_records_defaults(self, db_session):
        result = create_trip(db_session, {}, None, AuditContext(actor_id="user-no-flags"))
        assert result.audit_entry.feature_flags_snapshot == FeatureFlagSnapshot.defaults().to_dict()

    def test_context_required(self, db_session):
        with pytest.raises(ValueError):
            audit_logger.append(db_session, "x.y", "trip", "t-1", None)

    def test_queries(self, db_session, published_rfp, client_context, admin_context):
        assert [e.event_type for e in audit_logger.for_trace(db_session, client_context.trace_id)] == [
            "trip.created", "consent.granted", "rfp.published",
        ]
        assert all(e.user_id == client_context.actor_id for e in audit_logger.for_actor(db_session, client_context.actor_id))
        assert audit_logger.for_actor(db_session, admin_context.actor_id) == []


class TestAuditAtomicity:

    def test_rolled_back_operation_leaves_no_row(self, db_session, client_context):
        with pytest.raises(RuntimeError):
            with atomic_transaction(db_session):
                trip = Trip(user_id=client_context.actor_id, destination="Goa", party_size=2)
                db_session.add(trip)
                db_session.flush()
                audit_logger.append(db_session, "trip.created", "trip", trip.id, client_context)
                raise RuntimeError("downstream failure")

        assert db_session.query(Trip).count() == 0
        assert db_session.query(AuditLog).count() == 0
