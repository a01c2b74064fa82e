"""
Audit Logger - append-only trail of every state-affecting event

The audit row is added to the caller's session, so it commits or rolls back
together with the state change it documents. There is no update or delete
path; the flush guards in utils.model_guards reject both.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Generic, List, Optional, TypeVar

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from config import Config
from models import AuditLog
from utils.helpers import json_safe, utcnow
from utils.model_guards import register_model_guards

logger = logging.getLogger(__name__)

register_model_guards()

SYSTEM_ACTOR_PREFIX = "system:"

T = TypeVar("T")


@dataclass(frozen=True)
class AuditContext:
    """
    Who is acting and under which request, captured once per request.

    Every mutating lifecycle call requires one; the feature-flag snapshot it
    carries is what decision points consult, so behaviour is fixed for the
    whole request and reproducible from the audit row.
    """
    actor_id: Optional[str]
    trace_id: Optional[str] = None
    request_id: Optional[str] = None
    session_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    segment: Optional[str] = None  # user segment for flag targeting
    feature_flags: Optional[Any] = None  # FeatureFlagSnapshot
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_system(self) -> bool:
        return bool(self.actor_id) and self.actor_id.startswith(SYSTEM_ACTOR_PREFIX)

    def with_flags(self, snapshot) -> "AuditContext":
        return replace(self, feature_flags=snapshot)

    @classmethod
    def system(cls, job_name: str, trace_id: Optional[str] = None, feature_flags=None) -> "AuditContext":
        return cls(actor_id=f"{SYSTEM_ACTOR_PREFIX}{job_name}", trace_id=trace_id, feature_flags=feature_flags)


@dataclass
class AuditedResult(Generic[T]):
    """Outcome of a mutating call together with the audit row it wrote"""
    value: T
    audit_entry: Optional[AuditLog]
    replayed: bool = False


class AuditLogger:
    """Service for appending and querying audit rows"""

    @staticmethod
    def append(
        session: Session,
        event_type: str,
        entity_type: str,
        entity_id: Optional[str],
        context: AuditContext,
        before: Optional[Dict[str, Any]] = None,
        after: Optional[Dict[str, Any]] = None,
        event_data: Optional[Dict[str, Any]] = None,
        consent_snapshot: Optional[Any] = None,
    ) -> AuditLog:
        """
        Append one audit row inside the caller's transaction.

        The row is flushed immediately so a constraint failure surfaces here
        and aborts the originating operation.
        """
        if context is None:
            raise ValueError("AuditContext is required for every audited mutation")

        from services.feature_flags import snapshot_for

        flags = snapshot_for(context).to_dict()
        data = dict(event_data or {})
        if context.metadata:
            data.setdefault("context", json_safe(context.metadata))
        if context.segment:
            data.setdefault("segment", context.segment)

        entry = AuditLog(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=str(entity_id) if entity_id is not None else None,
            user_id=context.actor_id,
            session_id=context.session_id,
            trace_id=context.trace_id,
            request_id=context.request_id,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            event_data=json_safe(data),
            before_state=json_safe(before) if before is not None else None,
            after_state=json_safe(after) if after is not None else None,
            feature_flags_snapshot=flags,
            consent_snapshot=json_safe(consent_snapshot) if consent_snapshot is not None else None,
            service_name=Config.SERVICE_NAME,
            service_version=Config.SERVICE_VERSION,
            created_at=utcnow(),
        )
        session.add(entry)
        session.flush()

        logger.info(
            f"🛡️ AUDIT: {event_type} {entity_type}:{entity_id} "
            f"actor={context.actor_id} trace={context.trace_id}"
        )
        return entry

    @staticmethod
    def for_entity(session: Session, entity_type: str, entity_id: str) -> List[AuditLog]:
        stmt = (
            select(AuditLog)
            .where(AuditLog.entity_type == entity_type, AuditLog.entity_id == str(entity_id))
            .order_by(AuditLog.id)
        )
        return list(session.execute(stmt).scalars().all())

    @staticmethod
    def for_actor(session: Session, actor_id: str) -> List[AuditLog]:
        stmt = select(AuditLog).where(AuditLog.user_id == actor_id).order_by(AuditLog.id)
        return list(session.execute(stmt).scalars().all())

    @staticmethod
    def for_trace(session: Session, trace_id: str) -> List[AuditLog]:
        stmt = select(AuditLog).where(AuditLog.trace_id == trace_id).order_by(AuditLog.id)
        return list(session.execute(stmt).scalars().all())

    @staticmethod
    def count(session: Session) -> int:
        return session.execute(select(func.count(AuditLog.id))).scalar_one()


audit_logger = AuditLogger()
