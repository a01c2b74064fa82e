"""
Shared fixtures for the booking lifecycle test suite.

Every test gets its own SQLite file database under tmp_path, so threads in
the concurrency tests can open independent connections to the same store.
Fixtures build the lifecycle bottom-up: provider -> trip -> consent -> RFP ->
offers -> accepted offer -> held booking. Only placeholder contact details
are used.
"""

import os

# Module-level engine in database.py must not touch a file in the working tree
os.environ.setdefault("DATABASE_URL", "sqlite://")

import logging
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy.orm import sessionmaker

from database import build_engine, create_tables
from models import KYCStatus, ConsentCategory
from services.audit_logger import AuditContext
from services.feature_flags import FeatureFlagSnapshot
from services.provider_service import register_provider, update_kyc_status
from services.trip_consent_service import create_trip, grant_consent
from services.rfp_offer_service import publish_rfp, submit_offer, accept_offer
from services.booking_service import create_booking

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

CLIENT_ID = "11111111-1111-4111-8111-111111111111"
STRANGER_ID = "22222222-2222-4222-8222-222222222222"
ADMIN_ID = "33333333-3333-4333-8333-333333333333"
REVIEWER_ID = "44444444-4444-4444-8444-444444444444"

CLIENT_TRACE = "trace-client-0001"

FAMILY_PROFILE = {
    "party_size": 4,
    "trip_type": "family",
    "age_bracket": "36-45",
    "gender": "prefer_not_to_say",
    "budget_bracket": "mid_range",
    "budget_per_person": Decimal("15000.00"),
}

FAMILY_QUESTIONNAIRE = {
    "interests": ["beaches", "heritage walks", "spice plantations"],
    "pace": "relaxed",
    "dietary_preferences": ["vegetarian"],
    "contact_note": "call me on +91 98765 43210",
    "beach_preference": "quiet, mail me at traveller@example.com",
}

DEFAULT_BUDGET = {"min": "40000", "max": "80000", "currency": "INR"}


# ============================================================================
# DATABASE
# ============================================================================

@pytest.fixture
def engine(tmp_path):
    """Fresh SQLite file database per test"""
    db_engine = build_engine(f"sqlite:///{tmp_path / 'lifecycle.db'}", echo=False)
    create_tables(bind=db_engine)
    yield db_engine
    db_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.rollback()
    session.close()


# ============================================================================
# CONTEXTS
# ============================================================================

@pytest.fixture
def flags():
    return FeatureFlagSnapshot.defaults()


@pytest.fixture
def client_context(flags):
    return AuditContext(
        actor_id=CLIENT_ID,
        trace_id=CLIENT_TRACE,
        request_id="req-client-0001",
        session_id="sess-client-0001",
        ip_address="203.0.113.10",
        user_agent="pytest-client",
        feature_flags=flags,
    )


@pytest.fixture
def stranger_context(flags):
    return AuditContext(actor_id=STRANGER_ID, trace_id="trace-stranger-0001", feature_flags=flags)


@pytest.fixture
def admin_context(flags):
    return AuditContext(actor_id=ADMIN_ID, trace_id="trace-admin-0001", feature_flags=flags)


@pytest.fixture
def reviewer_context(flags):
    return AuditContext(actor_id=REVIEWER_ID, trace_id="trace-reviewer-0001", feature_flags=flags)


@pytest.fixture
def provider_context(flags):
    def _make(provider):
        return AuditContext(actor_id=provider.id, trace_id=f"trace-provider-{provider.id[:8]}", feature_flags=flags)
    return _make


# ============================================================================
# LIFECYCLE BUILDERS
# ============================================================================

@pytest.fixture
def make_provider(db_session, admin_context):
    """Register a provider, verified unless told otherwise"""
    counter = {"n": 0}

    def _make(kyc_status=KYCStatus.VERIFIED, name=None):
        counter["n"] += 1
        provider = register_provider(
            db_session,
            name or f"Coastal Tours {counter['n']}",
            f"ops{counter['n']}@example.com",
            admin_context,
            phone="+00 0000 000000",
        ).value
        if kyc_status != KYCStatus.PENDING:
            update_kyc_status(db_session, provider.id, kyc_status, admin_context)
        return provider
    return _make


@pytest.fixture
def planning_trip(db_session, client_context):
    return create_trip(db_session, dict(FAMILY_PROFILE), dict(FAMILY_QUESTIONNAIRE), client_context).value


@pytest.fixture
def consented_trip(db_session, planning_trip, client_context):
    grant_consent(
        db_session,
        planning_trip.id,
        [ConsentCategory.DEMOGRAPHICS.value, ConsentCategory.PREFERENCES.value],
        timedelta(hours=24),
        client_context,
    )
    return planning_trip


@pytest.fixture
def published_rfp(db_session, consented_trip, client_context):
    return publish_rfp(db_session, consented_trip.id, dict(DEFAULT_BUDGET), client_context).value


@pytest.fixture
def two_offers(db_session, published_rfp, make_provider, provider_context):
    offers = []
    for price in ("52000.00", "61000.00"):
        provider = make_provider()
        offers.append(
            submit_offer(
                db_session,
                published_rfp.id,
                provider.id,
                {"price": price, "description": "Four nights in South Goa", "inclusions": ["stay", "transfers"]},
                provider_context(provider),
            ).value
        )
    return offers


@pytest.fixture
def accepted_offer(db_session, two_offers, client_context):
    return accept_offer(db_session, two_offers[0].id, client_context).value


@pytest.fixture
def held_booking(db_session, accepted_offer, client_context):
    response = create_booking(db_session, accepted_offer.id, "idem-key-held", client_context).value
    return response
