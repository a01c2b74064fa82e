"""
Feature Flags
=============

Flags are read once per request into an immutable FeatureFlagSnapshot that is
carried on the AuditContext. Decision points consult the snapshot rather than
the database, so a request behaves consistently and its audit row records
exactly the configuration it ran under.

Rollout semantics:
- disabled flag: off for everyone
- enabled with rollout 0 or 100: on for everyone
- enabled with rollout 1-99: on for subjects whose stable SHA-256 bucket
  falls below the percentage (off when no subject id is supplied)
- a subject in one of the flag's user_segments is always on
"""

import hashlib
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from models import FeatureFlag
from services.audit_logger import AuditContext, AuditedResult, audit_logger
from utils.atomic_transactions import atomic_transaction
from utils.exceptions import FeatureDisabledError, ValidationFailedError
from utils.helpers import snapshot_model

logger = logging.getLogger(__name__)

# (name, enabled, description) as provisioned for a fresh store
DEFAULT_FLAGS: Tuple[Tuple[str, bool, str], ...] = (
    ("trip_creation_enabled", True, "Enable trip creation functionality"),
    ("questionnaire_flow", True, "Enable dynamic questionnaire"),
    ("events_ingest", True, "Enable event ingestion from external sources"),
    ("provider_rfp", True, "Enable RFP system for providers"),
    ("auto_book", False, "Enable automatic booking confirmation"),
    ("adventure_validator", False, "Enable adventure activity validation"),
    ("photo_verification", True, "Enable photo verification for activities"),
    ("llm_orchestrator", True, "Enable LLM-powered features"),
    ("real_time_pricing", False, "Enable dynamic pricing algorithms"),
    ("ml_recommendations", False, "Enable ML-based recommendations"),
)


@dataclass(frozen=True)
class FlagState:
    enabled: bool
    rollout_percentage: int = 0
    user_segments: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "rollout_percentage": self.rollout_percentage,
            "user_segments": list(self.user_segments),
        }


def rollout_bucket(flag_name: str, subject_id: str) -> int:
    """Stable 0-99 bucket for a subject under a given flag"""
    digest = hashlib.sha256(f"{flag_name}:{subject_id}".encode()).hexdigest()
    return int(digest[:8], 16) % 100


@dataclass(frozen=True)
class FeatureFlagSnapshot:
    """Immutable view of every flag at the moment a request started"""
    flags: Mapping[str, FlagState] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "flags", MappingProxyType(dict(self.flags)))

    def is_enabled(self, name: str, subject_id: Optional[str] = None, segment: Optional[str] = None) -> bool:
        state = self.flags.get(name)
        if state is None or not state.enabled:
            return False
        if segment is not None and segment in state.user_segments:
            return True
        if state.rollout_percentage in (0, 100):
            return True
        if subject_id is None:
            return False
        return rollout_bucket(name, subject_id) < state.rollout_percentage

    def require(self, name: str, subject_id: Optional[str] = None, segment: Optional[str] = None):
        """Raise FeatureDisabledError unless the flag is on for the subject or its segment"""
        if not self.is_enabled(name, subject_id, segment):
            logger.info(f"🚩 FEATURE_DISABLED: {name} (subject={subject_id}, segment={segment})")
            raise FeatureDisabledError(name)

    def to_dict(self) -> Dict[str, Any]:
        return {name: state.to_dict() for name, state in sorted(self.flags.items())}

    @classmethod
    def defaults(cls) -> "FeatureFlagSnapshot":
        return cls({name: FlagState(enabled=enabled) for name, enabled, _ in DEFAULT_FLAGS})

    @classmethod
    def from_overrides(cls, **overrides: bool) -> "FeatureFlagSnapshot":
        """Default flags with some switched; convenient for fixed test snapshots"""
        flags = dict(cls.defaults().flags)
        for name, enabled in overrides.items():
            flags[name] = FlagState(enabled=enabled)
        return cls(flags)


def snapshot_for(context: AuditContext) -> FeatureFlagSnapshot:
    """Snapshot carried by the context, or the provisioned defaults"""
    return context.feature_flags if context.feature_flags is not None else FeatureFlagSnapshot.defaults()


def load_snapshot(session: Session) -> FeatureFlagSnapshot:
    """Read stored flags over the defaults into a snapshot"""
    flags = dict(FeatureFlagSnapshot.defaults().flags)
    for row in session.execute(select(FeatureFlag)).scalars():
        flags[row.name] = FlagState(
            enabled=bool(row.enabled),
            rollout_percentage=int(row.rollout_percentage or 0),
            user_segments=tuple(row.user_segments or ()),
        )
    return FeatureFlagSnapshot(flags)


def seed_default_flags(session: Session, context: AuditContext) -> AuditedResult[int]:
    """Insert any default flag not yet stored; one audit row when anything is added"""
    with atomic_transaction(session):
        existing = set(session.execute(select(FeatureFlag.name)).scalars())
        added = []
        for name, enabled, description in DEFAULT_FLAGS:
            if name in existing:
                continue
            session.add(FeatureFlag(name=name, enabled=enabled, description=description, created_by=context.actor_id))
            added.append(name)

        entry = None
        if added:
            session.flush()
            entry = audit_logger.append(
                session,
                event_type="feature_flags.seeded",
                entity_type="feature_flag",
                entity_id=None,
                context=context,
                after={"added": added},
            )
            logger.info(f"🚩 FLAGS_SEEDED: {len(added)} default flags provisioned")
    return AuditedResult(value=len(added), audit_entry=entry)


def set_flag(
    session: Session,
    name: str,
    context: AuditContext,
    enabled: Optional[bool] = None,
    rollout_percentage: Optional[int] = None,
    user_segments: Optional[Iterable[str]] = None,
    description: Optional[str] = None,
) -> AuditedResult[FeatureFlag]:
    """Create or update a flag"""
    if rollout_percentage is not None and not 0 <= rollout_percentage <= 100:
        raise ValidationFailedError(
            f"rollout_percentage must be 0-100, got {rollout_percentage}",
            reason="invalid_rollout",
        )

    with atomic_transaction(session):
        flag = session.get(FeatureFlag, name)
        before = snapshot_model(flag)
        if flag is None:
            flag = FeatureFlag(name=name, enabled=False, rollout_percentage=0, user_segments=[], created_by=context.actor_id)
            session.add(flag)
        if enabled is not None:
            flag.enabled = enabled
        if rollout_percentage is not None:
            flag.rollout_percentage = rollout_percentage
        if user_segments is not None:
            flag.user_segments = sorted(set(user_segments))
        if description is not None:
            flag.description = description
        session.flush()

        entry = audit_logger.append(
            session,
            event_type="feature_flag.updated" if before else "feature_flag.created",
            entity_type="feature_flag",
            entity_id=name,
            context=context,
            before=before,
            after=snapshot_model(flag),
        )
        logger.info(f"🚩 FLAG_SET: {name} enabled={flag.enabled} rollout={flag.rollout_percentage}%")
    return AuditedResult(value=flag, audit_entry=entry)
