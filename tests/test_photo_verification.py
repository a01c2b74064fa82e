"""
Photo verification tests: EXIF parsing, automated scoring against the
review threshold and the manual review path.
"""

from decimal import Decimal

import pytest

from config import Config
from models import PhotoVerificationStatus
from services.audit_logger import AuditContext
from services.feature_flags import FeatureFlagSnapshot
from services.photo_verification_service import (
    complete_manual_review,
    compute_photo_hash,
    extract_gps,
    extract_timestamp,
    record_automated_result,
    submit_photo,
)
from services.trip_consent_service import cancel_trip
from utils.exceptions import (
    ConflictError, FeatureDisabledError, UnauthorizedError, ValidationFailedError
)

PHOTO_URL = "https://photos.example.com/trip/beach.jpg"
SCORER = AuditContext.system("photo_scoring")


class TestExifParsing:

    def test_decimal_coordinates(self):
        assert extract_gps({"GPSLatitude": 15.4909, "GPSLongitude": 73.8278}) == (15.4909, 73.8278)

    def test_dms_with_hemisphere_refs(self):
        latitude, longitude = extract_gps({
            "GPSInfo": {
                "GPSLatitude": [33, 51, 54.0],
                "GPSLatitudeRef": "S",
                "GPSLongitude": [151, 12, 36.0],
                "GPSLongitudeRef": "W",
            }
        })
        assert latitude == pytest.approx(-33.865)
        assert longitude == pytest.approx(-151.21)

    def test_missing_longitude_gives_no_fix(self):
        assert extract_gps({"GPSLatitude": 15.49}) == (None, None)
        assert extract_gps(None) == (None, None)

    @pytest.mark.parametrize("exif", [
        {"GPSLatitude": 95.0, "GPSLongitude": 10.0},
        {"GPSLatitude": 10.0, "GPSLongitude": 181.0},
        {"GPSLatitude": "north-ish", "GPSLongitude": 10.0},
    ])
    def test_bad_coordinates_rejected(self, exif):
        with pytest.raises(ValidationFailedError) as exc_info:
            extract_gps(exif)
        assert exc_info.value.reason == "invalid_exif"

    def test_capture_time(self):
        taken = extract_timestamp({"DateTimeOriginal": "2024:12:24 18:05:00"})
        assert (taken.year, taken.month, taken.day, taken.hour) == (2024, 12, 24, 18)
        assert extract_timestamp({"DateTimeOriginal": "yesterday"}) is None

    def test_photo_hash_is_sha256(self):
        assert compute_photo_hash(b"") == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"


class TestSubmitPhoto:

    def test_submit_is_pending(self, db_session, planning_trip, client_context):
        result = submit_photo(
            db_session, planning_trip.id, PHOTO_URL, client_context,
            exif_data={"GPSLatitude": 15.5, "GPSLongitude": 73.8}, photo_bytes=b"jpeg-bytes",
        )
        photo = result.value
        assert photo.verification_status == PhotoVerificationStatus.PENDING.value
        assert photo.gps_latitude == 15.5
        assert photo.photo_hash == compute_photo_hash(b"jpeg-bytes")
        assert result.audit_entry.event_data["has_gps"] is True

    @pytest.mark.parametrize("url", ["ftp://photos.example.com/a.jpg", "not a url", "", "https://"])
    def test_bad_url_rejected(self, db_session, planning_trip, client_context, url):
        with pytest.raises(ValidationFailedError):
            submit_photo(db_session, planning_trip.id, url, client_context)

    def test_gated_by_flag(self, db_session, planning_trip, client_context):
        context = client_context.with_flags(FeatureFlagSnapshot.from_overrides(photo_verification=False))
        with pytest.raises(FeatureDisabledError):
            submit_photo(db_session, planning_trip.id, PHOTO_URL, context)

    def test_only_owner_submits(self, db_session, planning_trip, stranger_context):
        with pytest.raises(UnauthorizedError):
            submit_photo(db_session, planning_trip.id, PHOTO_URL, stranger_context)

    def test_cancelled_trip_rejected(self, db_session, planning_trip, client_context):
        cancel_trip(db_session, planning_trip.id, client_context)
        with pytest.raises(ConflictError):
            submit_photo(db_session, planning_trip.id, PHOTO_URL, client_context)


@pytest.fixture
def photo(db_session, planning_trip, client_context):
    return submit_photo(db_session, planning_trip.id, PHOTO_URL, client_context).value


class TestAutomatedScoring:

    def test_high_confidence_approves(self, db_session, photo):
        result = record_automated_result(db_session, photo.id, 0.92, SCORER)
        assert result.value.verification_status == PhotoVerificationStatus.APPROVED.value
        assert result.value.manual_review_required is False
        assert result.value.confidence_score == Decimal("0.92")
        assert result.audit_entry.event_type == "photo.auto_approved"

    def test_threshold_is_inclusive(self, db_session, photo, monkeypatch):
        monkeypatch.setattr(Config, "PHOTO_REVIEW_CONFIDENCE_THRESHOLD", 0.8)
        result = record_automated_result(db_session, photo.id, 0.8, SCORER)
        assert result.value.verification_status == PhotoVerificationStatus.APPROVED.value

    def test_low_confidence_requests_review(self, db_session, photo, monkeypatch):
        monkeypatch.setattr(Config, "PHOTO_REVIEW_CONFIDENCE_THRESHOLD", 0.8)
        result = record_automated_result(db_session, photo.id, 0.79, SCORER)
        assert result.value.verification_status == PhotoVerificationStatus.PENDING.value
        assert result.value.manual_review_required is True
        assert result.audit_entry.event_type == "photo.manual_review_requested"

    @pytest.mark.parametrize("confidence", [-0.1, 1.5, True, "0.9", None])
    def test_confidence_out_of_range(self, db_session, photo, confidence):
        with pytest.raises(ValidationFailedError):
            record_automated_result(db_session, photo.id, confidence, SCORER)

    def test_scored_once(self, db_session, photo):
        record_automated_result(db_session, photo.id, 0.3, SCORER)
        with pytest.raises(ConflictError) as exc_info:
            record_automated_result(db_session, photo.id, 0.95, SCORER)
        assert exc_info.value.reason == "already_scored"


class TestManualReview:

    def test_reviewer_approves(self, db_session, photo, reviewer_context):
        record_automated_result(db_session, photo.id, 0.2, SCORER)
        result = complete_manual_review(db_session, photo.id, True, reviewer_context)

        assert result.value.verification_status == PhotoVerificationStatus.APPROVED.value
        assert result.value.manual_review_required is False
        assert result.value.approved_by == reviewer_context.actor_id
        assert result.audit_entry.event_type == "photo.approved"

    def test_reviewer_rejects(self, db_session, photo, reviewer_context):
        record_automated_result(db_session, photo.id, 0.2, SCORER)
        result = complete_manual_review(db_session, photo.id, False, reviewer_context)
        assert result.value.verification_status == PhotoVerificationStatus.REJECTED.value
        assert result.value.approved_at is None

    def test_owner_cannot_review_own_photo(self, db_session, photo, client_context):
        record_automated_result(db_session, photo.id, 0.2, SCORER)
        with pytest.raises(UnauthorizedError) as exc_info:
            complete_manual_review(db_session, photo.id, True, client_context)
        assert exc_info.value.reason == "self_review"

    def test_review_requires_low_score_first(self, db_session, photo, reviewer_context):
        with pytest.raises(ConflictError) as exc_info:
            complete_manual_review(db_session, photo.id, True, reviewer_context)
        assert exc_info.value.reason == "not_in_manual_review"

    def test_decision_is_final(self, db_session, photo, reviewer_context):
        record_automated_result(db_session, photo.id, 0.2, SCORER)
        complete_manual_review(db_session, photo.id, False, reviewer_context)
        with pytest.raises(ConflictError):
            complete_manual_review(db_session, photo.id, True, reviewer_context)
