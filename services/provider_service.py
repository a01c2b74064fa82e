"""
Provider registration and KYC lifecycle.

Only providers whose KYC is verified and who are active may bid on RFPs or
have an offer accepted.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from models import Provider, KYCStatus
from services.audit_logger import AuditContext, AuditedResult, audit_logger
from utils.atomic_transactions import atomic_transaction
from utils.exceptions import ConflictError, NotFoundError, ValidationFailedError
from utils.helpers import EMAIL_PATTERN, resolve_now, snapshot_model
from utils.lifecycle_state_validators import KYCStateValidator

logger = logging.getLogger(__name__)


def get_provider(session: Session, provider_id: str) -> Provider:
    provider = session.get(Provider, provider_id)
    if provider is None:
        raise NotFoundError("provider", provider_id)
    return provider


def is_provider_eligible(provider: Provider) -> bool:
    return provider.kyc_status == KYCStatus.VERIFIED.value and bool(provider.active)


def ensure_provider_eligible(provider: Provider):
    """Raise ConflictError unless the provider is KYC-verified and active"""
    if provider.kyc_status != KYCStatus.VERIFIED.value:
        raise ConflictError(
            f"Provider {provider.id} KYC is {provider.kyc_status}",
            reason="provider_not_verified",
            details={"provider_id": provider.id, "kyc_status": provider.kyc_status},
        )
    if not provider.active:
        raise ConflictError(
            f"Provider {provider.id} is inactive",
            reason="provider_inactive",
            details={"provider_id": provider.id},
        )


def register_provider(
    session: Session,
    business_name: str,
    contact_email: str,
    context: AuditContext,
    phone: Optional[str] = None,
    address: Optional[str] = None,
    kyc_documents: Optional[Dict[str, Any]] = None,
) -> AuditedResult[Provider]:
    """Register a provider with KYC pending"""
    if not business_name or not business_name.strip():
        raise ValidationFailedError("business_name is required", reason="invalid_provider")
    if not contact_email or not EMAIL_PATTERN.fullmatch(contact_email.strip()):
        raise ValidationFailedError("contact_email is not a valid address", reason="invalid_provider")

    with atomic_transaction(session):
        provider = Provider(
            business_name=business_name.strip(),
            contact_email=contact_email.strip().lower(),
            phone=phone,
            address=address,
            kyc_status=KYCStatus.PENDING.value,
            kyc_documents=kyc_documents or {},
            active=True,
        )
        session.add(provider)
        session.flush()

        entry = audit_logger.append(
            session,
            event_type="provider.registered",
            entity_type="provider",
            entity_id=provider.id,
            context=context,
            after=snapshot_model(provider),
        )
        logger.info(f"🏢 PROVIDER_REGISTERED: {provider.id} ({provider.business_name})")
    return AuditedResult(value=provider, audit_entry=entry)


def update_kyc_status(
    session: Session,
    provider_id: str,
    new_status: KYCStatus,
    context: AuditContext,
    notes: Optional[str] = None,
) -> AuditedResult[Provider]:
    target = KYCStatus(new_status.value if isinstance(new_status, KYCStatus) else new_status)
    with atomic_transaction(session):
        provider = get_provider(session, provider_id)
        before = snapshot_model(provider)
        KYCStateValidator.ensure_transition(provider.kyc_status, target, provider.id)

        provider.kyc_status = target.value
        provider.verification_date = resolve_now() if target == KYCStatus.VERIFIED else None
        session.flush()

        entry = audit_logger.append(
            session,
            event_type=f"provider.kyc_{target.value}",
            entity_type="provider",
            entity_id=provider.id,
            context=context,
            before=before,
            after=snapshot_model(provider),
            event_data={"notes": notes} if notes else None,
        )
        logger.info(f"🪪 KYC_UPDATED: provider {provider.id} {before['kyc_status']} -> {target.value}")
    return AuditedResult(value=provider, audit_entry=entry)


def set_provider_active(
    session: Session,
    provider_id: str,
    active: bool,
    context: AuditContext,
) -> AuditedResult[Provider]:
    with atomic_transaction(session):
        provider = get_provider(session, provider_id)
        if bool(provider.active) == bool(active):
            raise ConflictError(
                f"Provider {provider.id} is already {'active' if active else 'inactive'}",
                reason="no_change",
            )
        before = snapshot_model(provider)
        provider.active = bool(active)
        session.flush()

        entry = audit_logger.append(
            session,
            event_type="provider.activated" if active else "provider.deactivated",
            entity_type="provider",
            entity_id=provider.id,
            context=context,
            before=before,
            after=snapshot_model(provider),
        )
        logger.info(f"🏢 PROVIDER_ACTIVE: {provider.id} active={provider.active}")
    return AuditedResult(value=provider, audit_entry=entry)
