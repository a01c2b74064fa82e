"""
Lifecycle Error Taxonomy
========================

Every failed lifecycle operation raises one of these. Callers branch on the
class (or ``code``) and read ``reason`` for the specific cause; nothing is
coerced into a success value.

- NotFoundError: entity id did not resolve
- ConflictError: illegal state transition, duplicate acceptance, closed RFP
- ExpiredError: hold, offer, RFP or consent past its deadline (a Conflict)
- FeatureDisabledError: a feature flag gates the operation off (a Conflict)
- ValidationFailedError: PII leakage, malformed questionnaire or terms
- UnauthorizedError: actor does not own the entity
"""

from typing import Any, Dict, Optional


class LifecycleError(Exception):
    """Base class for all lifecycle failures"""

    code = "lifecycle_error"

    def __init__(self, message: str, reason: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.reason = reason or self.code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "reason": self.reason,
            "message": self.message,
            "details": self.details,
        }


class NotFoundError(LifecycleError):
    code = "not_found"

    def __init__(self, entity_type: str, entity_id: Any):
        super().__init__(
            f"{entity_type} {entity_id} not found",
            reason=f"{entity_type}_not_found",
            details={"entity_type": entity_type, "entity_id": str(entity_id)},
        )
        self.entity_type = entity_type
        self.entity_id = entity_id


class ConflictError(LifecycleError):
    code = "conflict"


class StateTransitionError(ConflictError):
    """Raised when an invalid state transition is attempted"""

    def __init__(self, entity_type: str, entity_id: Any, from_status: Optional[str], to_status: str):
        super().__init__(
            f"Invalid {entity_type} transition {from_status} -> {to_status} for {entity_id}",
            reason="illegal_transition",
            details={
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "from_status": from_status,
                "to_status": to_status,
            },
        )


class ExpiredError(ConflictError):
    code = "expired"


class FeatureDisabledError(ConflictError):
    code = "feature_disabled"

    def __init__(self, flag_name: str):
        super().__init__(
            f"Feature '{flag_name}' is disabled",
            reason="feature_disabled",
            details={"flag": flag_name},
        )


class ValidationFailedError(LifecycleError):
    code = "validation_failed"


class UnauthorizedError(LifecycleError):
    code = "unauthorized"
