"""
Feature flag tests: snapshot semantics, percentage rollout, segments and the
stored flag table.
"""

import pytest

from models import AuditLog, FeatureFlag
from services.audit_logger import AuditContext, audit_logger
from services.feature_flags import (
    DEFAULT_FLAGS,
    FeatureFlagSnapshot,
    FlagState,
    load_snapshot,
    rollout_bucket,
    seed_default_flags,
    set_flag,
    snapshot_for,
)
from utils.exceptions import FeatureDisabledError, ValidationFailedError


class TestSnapshot:

    def test_defaults(self):
        snapshot = FeatureFlagSnapshot.defaults()
        assert snapshot.is_enabled("trip_creation_enabled")
        assert snapshot.is_enabled("provider_rfp")
        assert not snapshot.is_enabled("auto_book")
        assert not snapshot.is_enabled("no_such_flag")

    def test_snapshot_is_read_only(self):
        snapshot = FeatureFlagSnapshot.defaults()
        with pytest.raises(TypeError):
            snapshot.flags["auto_book"] = FlagState(enabled=True)

    def test_require_raises_with_flag_name(self):
        with pytest.raises(FeatureDisabledError) as exc_info:
            FeatureFlagSnapshot.defaults().require("auto_book", "user-1")
        assert exc_info.value.details["flag"] == "auto_book"

    def test_context_without_snapshot_uses_defaults(self):
        assert snapshot_for(AuditContext(actor_id="user-1")).to_dict() == FeatureFlagSnapshot.defaults().to_dict()


class TestRollout:

    def test_bucket_is_stable(self):
        assert rollout_bucket("auto_book", "user-1") == rollout_bucket("auto_book", "user-1")
        assert 0 <= rollout_bucket("auto_book", "user-1") < 100

    def test_partial_rollout_splits_subjects(self):
        snapshot = FeatureFlagSnapshot({"auto_book": FlagState(enabled=True, rollout_percentage=30)})
        subjects = [f"user-{i}" for i in range(400)]
        enabled = [s for s in subjects if snapshot.is_enabled("auto_book", s)]

        assert all(rollout_bucket("auto_book", s) < 30 for s in enabled)
        assert 60 < len(enabled) < 180
        assert not snapshot.is_enabled("auto_book")

    def test_segment_overrides_rollout(self):
        snapshot = FeatureFlagSnapshot({
            "auto_book": FlagState(enabled=True, rollout_percentage=1, user_segments=("beta",)),
        })
        assert snapshot.is_enabled("auto_book", "anyone", segment="beta")

    def test_require_honours_segment(self):
        snapshot = FeatureFlagSnapshot({
            "provider_rfp": FlagState(enabled=True, rollout_percentage=50, user_segments=("beta",)),
        })
        with pytest.raises(FeatureDisabledError):
            snapshot.require("provider_rfp")
        snapshot.require("provider_rfp", segment="beta")

    def test_disabled_flag_ignores_segments(self):
        snapshot = FeatureFlagSnapshot({
            "auto_book": FlagState(enabled=False, rollout_percentage=100, user_segments=("beta",)),
        })
        assert not snapshot.is_enabled("auto_book", "anyone", segment="beta")


class TestStoredFlags:

    def test_seed_is_idempotent(self, db_session, admin_context):
        first = seed_default_flags(db_session, admin_context)
        second = seed_default_flags(db_session, admin_context)

        assert first.value == len(DEFAULT_FLAGS)
        assert first.audit_entry.event_type == "feature_flags.seeded"
        assert second.value == 0
        assert second.audit_entry is None
        assert db_session.query(FeatureFlag).count() == len(DEFAULT_FLAGS)

    def test_set_flag_round_trips_into_snapshot(self, db_session, admin_context):
        seed_default_flags(db_session, admin_context)
        result = set_flag(db_session, "auto_book", admin_context, enabled=True, rollout_percentage=100,
                          user_segments=["beta", "beta", "staff"])

        assert result.audit_entry.event_type == "feature_flag.updated"
        assert result.audit_entry.before_state["enabled"] is False
        assert result.value.user_segments == ["beta", "staff"]
        assert load_snapshot(db_session).is_enabled("auto_book", "user-1")

    def test_set_unknown_flag_creates_it(self, db_session, admin_context):
        result = set_flag(db_session, "group_discounts", admin_context, enabled=True, description="Group pricing")
        assert result.audit_entry.event_type == "feature_flag.created"
        assert load_snapshot(db_session).is_enabled("group_discounts")

    @pytest.mark.parametrize("rollout", [-1, 101])
    def test_rollout_bounds(self, db_session, admin_context, rollout):
        with pytest.raises(ValidationFailedError):
            set_flag(db_session, "auto_book", admin_context, rollout_percentage=rollout)
        assert audit_logger.count(db_session) == 0

    def test_snapshot_unaffected_by_later_changes(self, db_session, admin_context):
        seed_default_flags(db_session, admin_context)
        snapshot = load_snapshot(db_session)
        set_flag(db_session, "provider_rfp", admin_context, enabled=False)

        assert snapshot.is_enabled("provider_rfp")
        assert not load_snapshot(db_session).is_enabled("provider_rfp")

    def test_long_flag_names_fit_the_audit_trail(self, db_session, admin_context):
        name = "provider_rfp_regional_pricing_experiment_north_goa_v2"
        assert AuditLog.__table__.c.entity_id.type.length >= FeatureFlag.__table__.c.name.type.length

        result = set_flag(db_session, name, admin_context, enabled=True)
        assert result.audit_entry.entity_id == name
        assert audit_logger.for_entity(db_session, "feature_flag", name)[0].event_type == "feature_flag.created"
