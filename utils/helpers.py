"""Helper utilities shared by the lifecycle services"""

import hashlib
import json
import re
import secrets
import uuid
from datetime import datetime, timezone, date
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import inspect as sa_inspect

EMAIL_PATTERN = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
# Seven or more digits, optionally separated by spaces, dots or dashes
PHONE_PATTERN = re.compile(r"(?:\+?\d[\s.\-()]*){7,}")

CENTS = Decimal("0.01")


def utcnow() -> datetime:
    """Current time as naive UTC, the storage convention for every timestamp"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalise an aware datetime to naive UTC; naive values are assumed UTC"""
    if value is None:
        return None
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def resolve_now(now: Optional[datetime] = None) -> datetime:
    return to_naive_utc(now) if now is not None else utcnow()


def generate_unique_id() -> str:
    return str(uuid.uuid4())


def generate_consent_token() -> str:
    """Opaque consent token handed to the traveller"""
    return f"ct_{secrets.token_urlsafe(24)}"


def quantize_amount(amount: Any) -> Decimal:
    """Money to two decimal places"""
    return Decimal(str(amount)).quantize(CENTS, rounding=ROUND_HALF_UP)


def json_safe(value: Any) -> Any:
    """Convert a value into something json.dumps accepts without a custom encoder"""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, dict):
        return {str(k): json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [json_safe(v) for v in value]
    return str(value)


def snapshot_model(instance: Any) -> Optional[Dict[str, Any]]:
    """JSON-safe dict of an ORM instance's column attributes"""
    if instance is None:
        return None
    mapper = sa_inspect(instance).mapper
    return {
        attr.key: json_safe(getattr(instance, attr.key))
        for attr in mapper.column_attrs
    }


def stable_hash(payload: Dict[str, Any]) -> str:
    """Deterministic SHA-256 of a JSON payload"""
    encoded = json.dumps(json_safe(payload), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(encoded.encode()).hexdigest()


def looks_like_contact_detail(value: str) -> bool:
    """True when free text carries an e-mail address or phone number"""
    return bool(EMAIL_PATTERN.search(value) or PHONE_PATTERN.search(value))
