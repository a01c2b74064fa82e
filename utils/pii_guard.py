"""
PII Guard
=========

Pure validation layer between a trip and anything published to providers.

RFP requirements are built from an explicit allow-list: every published field
belongs to a consent category, and only categories covered by an active
consent may be published. Anything not on the allow-list is stripped, free
text carrying contact details is dropped, and the finished payload is
re-validated before it is persisted.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Set

from config import Config
from models import ConsentCategory
from utils.exceptions import ConflictError, ValidationFailedError
from utils.helpers import json_safe, looks_like_contact_detail

logger = logging.getLogger(__name__)

# Permitted by any active consent: non-identifying shape of the trip
TRIP_PROFILE_CATEGORY = "trip_profile"

PROFILE_FIELD_CATEGORIES: Dict[str, str] = {
    "destination": TRIP_PROFILE_CATEGORY,
    "party_size": TRIP_PROFILE_CATEGORY,
    "trip_type": TRIP_PROFILE_CATEGORY,
    "budget_bracket": TRIP_PROFILE_CATEGORY,
    "budget_per_person": TRIP_PROFILE_CATEGORY,
    "age_bracket": ConsentCategory.DEMOGRAPHICS.value,
    "gender": ConsentCategory.DEMOGRAPHICS.value,
}

PREFERENCES_FIELD = "preferences"

# Questionnaire answers that may be published under "preferences"
QUESTIONNAIRE_ALLOWLIST: Set[str] = {
    "interests",
    "activity_level",
    "pace",
    "accommodation_type",
    "dietary_preferences",
    "cuisine_preferences",
    "transport_preference",
    "accessibility_needs",
    "travel_month",
    "trip_length_days",
    "preferred_areas",
    "nightlife",
    "beach_preference",
    "language_preference",
}

ANONYMIZED_FIELD_ALLOWLIST: Set[str] = set(PROFILE_FIELD_CATEGORIES) | {PREFERENCES_FIELD}

FIELD_CATEGORIES: Dict[str, str] = dict(PROFILE_FIELD_CATEGORIES)
FIELD_CATEGORIES[PREFERENCES_FIELD] = ConsentCategory.PREFERENCES.value

# Never publishable, whatever the consent
PII_FIELD_DENYLIST: Set[str] = {
    "name", "full_name", "first_name", "last_name",
    "email", "email_address", "phone", "phone_number", "mobile", "whatsapp",
    "address", "street_address", "home_address", "postal_code",
    "contact_info", "emergency_contact",
    "passport", "passport_number", "id_number", "national_id", "aadhaar", "pan",
    "date_of_birth", "dob", "birthday",
    "user_id", "ip_address", "device_id",
    "credit_card", "card_number", "payment_token",
    "input_text",
}

MAX_QUESTIONNAIRE_KEY_LENGTH = 64
MAX_LIST_ITEMS = 20

_SCALAR_TYPES = (str, int, float, bool, Decimal)


def validate_questionnaire(responses: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Validate questionnaire answers and return a JSON-safe copy.

    Keys must be short strings; values must be scalars or flat lists of
    scalars. Nested objects are rejected.
    """
    if responses is None:
        return {}
    if not isinstance(responses, dict):
        raise ValidationFailedError(
            "Questionnaire responses must be a key-value mapping",
            reason="malformed_questionnaire",
        )
    if len(responses) > Config.MAX_QUESTIONNAIRE_KEYS:
        raise ValidationFailedError(
            f"Questionnaire has {len(responses)} answers (max {Config.MAX_QUESTIONNAIRE_KEYS})",
            reason="malformed_questionnaire",
        )

    cleaned: Dict[str, Any] = {}
    for key, value in responses.items():
        if not isinstance(key, str) or not key.strip() or len(key) > MAX_QUESTIONNAIRE_KEY_LENGTH:
            raise ValidationFailedError(
                f"Invalid questionnaire key: {key!r}",
                reason="malformed_questionnaire",
            )
        cleaned[key.strip()] = _validate_answer(key, value)
    return cleaned


def _validate_answer(key: str, value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, _SCALAR_TYPES):
        _check_scalar(key, value)
        return json_safe(value)
    if isinstance(value, (list, tuple)):
        if len(value) > MAX_LIST_ITEMS:
            raise ValidationFailedError(
                f"Questionnaire answer '{key}' has too many items",
                reason="malformed_questionnaire",
            )
        items = []
        for item in value:
            if not isinstance(item, _SCALAR_TYPES):
                raise ValidationFailedError(
                    f"Questionnaire answer '{key}' must contain only plain values",
                    reason="malformed_questionnaire",
                )
            _check_scalar(key, item)
            items.append(json_safe(item))
        return items
    raise ValidationFailedError(
        f"Questionnaire answer '{key}' has unsupported type {type(value).__name__}",
        reason="malformed_questionnaire",
    )


def _check_scalar(key: str, value: Any):
    if isinstance(value, str) and len(value) > Config.MAX_QUESTIONNAIRE_VALUE_LENGTH:
        raise ValidationFailedError(
            f"Questionnaire answer '{key}' is too long",
            reason="malformed_questionnaire",
        )


def required_categories(fields: Iterable[str]) -> Set[str]:
    return {FIELD_CATEGORIES[field] for field in fields if field in FIELD_CATEGORIES}


def permitted_fields(granted_categories: Iterable[str], has_active_consent: bool) -> List[str]:
    """Allow-listed fields publishable under the given consent state"""
    if not has_active_consent:
        return []
    granted = set(granted_categories) | {TRIP_PROFILE_CATEGORY}
    return sorted(field for field, category in FIELD_CATEGORIES.items() if category in granted)


def _scrub_value(value: Any) -> Any:
    """Drop free text carrying contact details; returns None when nothing survives"""
    if isinstance(value, str):
        return None if looks_like_contact_detail(value) else value
    if isinstance(value, list):
        kept = [item for item in (_scrub_value(v) for v in value) if item is not None]
        return kept or None
    return value


def anonymize_preferences(questionnaire: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    preferences: Dict[str, Any] = {}
    for key, value in (questionnaire or {}).items():
        if key not in QUESTIONNAIRE_ALLOWLIST:
            continue
        scrubbed = _scrub_value(json_safe(value))
        if scrubbed is not None:
            preferences[key] = scrubbed
    return preferences


def build_anonymized_requirements(
    trip,
    granted_categories: Iterable[str],
    has_active_consent: bool,
    fields: Optional[Iterable[str]] = None,
) -> Dict[str, Any]:
    """
    Build RFP requirements from a trip using only allow-listed fields.

    Args:
        trip: Trip whose profile is published
        granted_categories: union of categories on the trip's active consents
        has_active_consent: whether any active consent exists at all
        fields: explicit fields to publish; defaults to every permitted field

    Raises:
        ValidationFailedError: a requested field is not publishable at all
        ConflictError: a requested field's consent category is not granted
    """
    allowed = set(permitted_fields(granted_categories, has_active_consent))

    if fields is None:
        selected = sorted(allowed)
    else:
        selected = list(dict.fromkeys(fields))
        not_publishable = [f for f in selected if f not in ANONYMIZED_FIELD_ALLOWLIST]
        if not_publishable:
            logger.warning(f"🚫 PII_GUARD: refused non-allow-listed fields {not_publishable}")
            raise ValidationFailedError(
                "Requested fields are not publishable",
                reason="pii_field_requested",
                details={"fields": sorted(not_publishable)},
            )
        missing_consent = [f for f in selected if f not in allowed]
        if missing_consent:
            raise ConflictError(
                "Consent does not cover the requested fields",
                reason="consent_required",
                details={
                    "fields": sorted(missing_consent),
                    "categories": sorted(required_categories(missing_consent)),
                },
            )

    requirements: Dict[str, Any] = {}
    for field in selected:
        if field == PREFERENCES_FIELD:
            preferences = anonymize_preferences(trip.questionnaire_responses)
            if preferences:
                requirements[PREFERENCES_FIELD] = preferences
            continue
        value = getattr(trip, field, None)
        if isinstance(value, Decimal):
            # Indicative budget published as a plain number
            requirements[field] = float(value)
        elif value is not None:
            scrubbed = _scrub_value(json_safe(value))
            if scrubbed is not None:
                requirements[field] = scrubbed

    validate_anonymized_requirements(requirements)
    return requirements


def validate_anonymized_requirements(requirements: Dict[str, Any]):
    """Reject any payload carrying a field or value outside the allow-list"""
    if not isinstance(requirements, dict):
        raise ValidationFailedError("Anonymized requirements must be a mapping", reason="pii_leak")

    leaked = sorted(set(requirements) - ANONYMIZED_FIELD_ALLOWLIST)
    if leaked:
        logger.error(f"🚨 PII_GUARD: non-allow-listed fields in RFP payload: {leaked}")
        raise ValidationFailedError(
            "Anonymized requirements contain non-allow-listed fields",
            reason="pii_leak",
            details={"fields": leaked},
        )

    preferences = requirements.get(PREFERENCES_FIELD, {})
    if not isinstance(preferences, dict):
        raise ValidationFailedError("Preferences must be a mapping", reason="pii_leak")
    leaked_preferences = sorted(set(preferences) - QUESTIONNAIRE_ALLOWLIST)
    if leaked_preferences:
        logger.error(f"🚨 PII_GUARD: non-allow-listed preferences in RFP payload: {leaked_preferences}")
        raise ValidationFailedError(
            "Anonymized preferences contain non-allow-listed answers",
            reason="pii_leak",
            details={"fields": leaked_preferences},
        )

    for value in _iter_strings(requirements):
        if looks_like_contact_detail(value):
            logger.error("🚨 PII_GUARD: contact detail found in RFP payload")
            raise ValidationFailedError(
                "Anonymized requirements contain contact details",
                reason="pii_leak",
            )


def _iter_strings(value: Any):
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from _iter_strings(item)
    elif isinstance(value, list):
        for item in value:
            yield from _iter_strings(item)
