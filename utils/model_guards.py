"""
Flush-time guards for invariants the schema alone does not enforce:
audit rows are append-only, and a booking's amount and currency are fixed
once the hold is created.
"""

import logging

from sqlalchemy import event, select, inspect as sa_inspect
from sqlalchemy.orm import Session

from models import AuditLog, Booking
from utils.exceptions import ConflictError, ValidationFailedError
from utils.helpers import quantize_amount

logger = logging.getLogger(__name__)

FIXED_BOOKING_ATTRIBUTES = ("amount", "currency")


def _guard_flush(session, flush_context, instances):
    for obj in session.deleted:
        if isinstance(obj, AuditLog):
            logger.error(f"🚫 AUDIT_GUARD: delete attempted on audit row {obj.id}")
            raise ConflictError("Audit log rows cannot be deleted", reason="audit_immutable")

    for obj in session.dirty:
        if isinstance(obj, AuditLog) and session.is_modified(obj, include_collections=False):
            logger.error(f"🚫 AUDIT_GUARD: update attempted on audit row {obj.id}")
            raise ConflictError("Audit log rows cannot be modified", reason="audit_immutable")

        if isinstance(obj, Booking):
            _guard_booking_terms(session, obj)


def _guard_booking_terms(session, booking):
    state = sa_inspect(booking)
    if not state.persistent:
        return
    changed = [name for name in FIXED_BOOKING_ATTRIBUTES if state.attrs[name].history.added]
    if not changed:
        return

    # History may lack the old value when the attribute was expired; read the stored row
    with session.no_autoflush:
        stored = session.execute(
            select(Booking.amount, Booking.currency).where(Booking.id == booking.id)
        ).one_or_none()
    if stored is None:
        return
    original = {"amount": stored.amount, "currency": stored.currency}
    for attr_name in changed:
        new_value = state.attrs[attr_name].history.added[0]
        old_value = original[attr_name]
        if attr_name == "amount":
            differs = quantize_amount(new_value) != quantize_amount(old_value)
        else:
            differs = new_value != old_value
        if differs:
            logger.error(f"🚫 BOOKING_GUARD: {attr_name} change attempted on booking {booking.id}")
            raise ValidationFailedError(
                f"Booking {attr_name} is fixed at hold time",
                reason="booking_amount_fixed",
                details={"booking_id": booking.id, "attribute": attr_name},
            )


def register_model_guards():
    """Attach the guards to every Session; safe to call repeatedly"""
    if not event.contains(Session, "before_flush", _guard_flush):
        event.listen(Session, "before_flush", _guard_flush)
        logger.debug("Model guards registered")
