"""
Capture triage tests: routing rule, settings, review actions and the
capture log.
"""

from unittest.mock import patch

import pytest
from hypothesis import given, strategies as st

from conftest import DELHI_LAT, DELHI_LNG, FakeClassifier, make_jpeg
from pahal.config import CaptureSettings, SettingsSnapshot
from pahal.errors import InvalidTransition, NotFound, PersistenceError
from pahal.models import Disposition, Incident, IncidentStatus, ReportSource
from pahal.services.geolocation import Location
from pahal.services.triage import decide_disposition, new_capture_id

LOCATION = Location(lat=DELHI_LAT, lng=DELHI_LNG, address="Kashmere Gate, Delhi")


def analysis(confidence, degraded=False):
    return FakeClassifier(confidence=confidence, degraded=degraded).result


class TestDecideDisposition:
    """Pure routing rule."""

    @given(
        confidence=st.floats(min_value=0.0, max_value=1.0),
        low=st.floats(min_value=0.0, max_value=1.0),
        high=st.floats(min_value=0.0, max_value=1.0),
    )
    def test_matches_threshold_bands(self, confidence, low, high):
        manual, auto = sorted((low, high))
        snapshot = SettingsSnapshot(15.0, auto, manual, True)

        disposition = decide_disposition(confidence, True, snapshot)

        if confidence >= auto:
            assert disposition is Disposition.AUTO_SUBMIT
        elif confidence >= manual:
            assert disposition is Disposition.PENDING_REVIEW
        else:
            assert disposition is Disposition.DISCARD

    @given(confidence=st.floats(min_value=0.0, max_value=1.0))
    def test_no_location_always_discards(self, confidence):
        snapshot = SettingsSnapshot(15.0, 0.8, 0.5, True)
        assert decide_disposition(confidence, False, snapshot) is Disposition.DISCARD

    @pytest.mark.parametrize("confidence, expected", [
        (0.80, Disposition.AUTO_SUBMIT),
        (0.7999, Disposition.PENDING_REVIEW),
        (0.50, Disposition.PENDING_REVIEW),
        (0.4999, Disposition.DISCARD),
        (0.0, Disposition.DISCARD),
        (1.0, Disposition.AUTO_SUBMIT),
    ])
    def test_thresholds_are_inclusive(self, confidence, expected):
        snapshot = SettingsSnapshot(15.0, 0.80, 0.50, True)
        assert decide_disposition(confidence, True, snapshot) is expected

    def test_capture_ids_are_unique(self):
        ids = {new_capture_id() for _ in range(200)}
        assert len(ids) == 200
        assert all(i.startswith("cam_") for i in ids)


class TestCaptureSettings:
    """Operator-tunable settings."""

    def test_defaults(self):
        snapshot = CaptureSettings().snapshot()
        assert snapshot.capture_interval_seconds == 15.0
        assert snapshot.auto_submit_threshold == 0.80
        assert snapshot.manual_review_threshold == 0.50
        assert snapshot.location_tracking is True

    def test_partial_update_keeps_other_values(self):
        settings = CaptureSettings()
        snapshot = settings.update(auto_submit_threshold=0.9)
        assert snapshot.auto_submit_threshold == 0.9
        assert snapshot.manual_review_threshold == 0.50
        assert settings.snapshot() == snapshot

    @pytest.mark.parametrize("changes", [
        {"auto_submit_threshold": 0.4},
        {"manual_review_threshold": 0.95},
        {"auto_submit_threshold": 1.5},
        {"manual_review_threshold": -0.1},
        {"capture_interval_seconds": 0},
        {"not_a_setting": 1},
    ])
    def test_invalid_update_rejected_and_unchanged(self, changes):
        settings = CaptureSettings()
        before = settings.snapshot()
        with pytest.raises(ValueError):
            settings.update(**changes)
        assert settings.snapshot() == before

    def test_invalid_construction_rejected(self):
        with pytest.raises(ValueError):
            CaptureSettings(auto_submit_threshold=0.3, manual_review_threshold=0.6)

    @pytest.mark.parametrize("value, expected", [
        ("false", False),
        ("False", False),
        ("0", False),
        ("off", False),
        ("true", True),
        ("yes", True),
        (0, False),
        (True, True),
    ])
    def test_location_tracking_parsed_like_env_flags(self, value, expected):
        assert CaptureSettings().update(location_tracking=value).location_tracking is expected

    @pytest.mark.parametrize("interval", [float("nan"), float("inf")])
    def test_non_finite_interval_rejected(self, interval):
        with pytest.raises(ValueError):
            CaptureSettings().update(capture_interval_seconds=interval)


class TestTriageRouter:
    """Routing against the database."""

    def test_auto_submit_at_threshold_creates_incident(self, services, published):
        capture = services.router.route(make_jpeg(), analysis(0.80), LOCATION)

        assert capture.disposition is Disposition.AUTO_SUBMIT
        assert capture.incident_id is not None
        assert capture.image_url.startswith("/media/captures/")

        incident = services.incidents.get(capture.incident_id)
        assert incident.source is ReportSource.SMART_CAMERA
        assert incident.status is IncidentStatus.REPORTED
        assert incident.report_count == 1
        assert incident.ai_confidence == 0.80
        assert incident.is_ai_verified is True
        assert incident.address == "Kashmere Gate, Delhi"
        assert len(incident.media) == 1
        assert incident.media[0].is_primary is True

        names = [event for event, _ in published]
        assert "incident_created" in names
        assert names[-1] == "capture_completed"

    def test_pending_review_creates_no_incident(self, services):
        capture = services.router.route(make_jpeg(), analysis(0.65), LOCATION)

        assert capture.disposition is Disposition.PENDING_REVIEW
        assert capture.incident_id is None
        assert capture.image_url is not None
        assert Incident.query.count() == 0

    def test_discard_keeps_no_image(self, services):
        capture = services.router.route(make_jpeg(), analysis(0.2), LOCATION)

        assert capture.disposition is Disposition.DISCARD
        assert capture.image_url is None
        assert Incident.query.count() == 0

    def test_high_confidence_without_location_is_discarded(self, services):
        capture = services.router.route(make_jpeg(), analysis(0.99), None)

        assert capture.disposition is Disposition.DISCARD
        assert capture.error == "No location available"
        assert capture.to_dict()["location"] is None
        assert Incident.query.count() == 0

    def test_settings_change_applies_to_next_capture(self, services):
        services.settings.update(auto_submit_threshold=0.95)
        capture = services.router.route(make_jpeg(), analysis(0.9), LOCATION)
        assert capture.disposition is Disposition.PENDING_REVIEW

    def test_degraded_analysis_is_flagged(self, services):
        capture = services.router.route(make_jpeg(), analysis(0.85, degraded=True), LOCATION)
        assert capture.degraded is True
        assert services.router.statistics()["degraded"] == 1

    def test_persistence_failure_records_error_and_raises(self, services):
        with patch.object(
            services.incidents, "create_from_capture", side_effect=PersistenceError("db down")
        ):
            with pytest.raises(PersistenceError):
                services.router.route(make_jpeg(), analysis(0.9), LOCATION, capture_id="cam_fail")

        stored = services.router.get("cam_fail")
        assert stored.error == "db down"
        assert stored.incident_id is None

    def test_approve_promotes_pending_capture(self, services):
        capture = services.router.route(make_jpeg(), analysis(0.6), LOCATION)

        approved = services.router.approve(capture.id)

        assert approved.disposition is Disposition.APPROVED
        assert approved.reviewed_at is not None
        incident = services.incidents.get(approved.incident_id)
        assert incident.source is ReportSource.SMART_CAMERA
        assert incident.report_count == 1
        assert len(incident.media) == 1

    def test_reject_records_notes_and_reviewer(self, services):
        capture = services.router.route(make_jpeg(), analysis(0.6), LOCATION)

        rejected = services.router.reject(capture.id, notes="  Parked car, no collision ", reviewer="op-7")

        assert rejected.disposition is Disposition.REJECTED
        assert rejected.review_notes == "Parked car, no collision"
        assert rejected.reviewed_by == "op-7"
        assert rejected.to_dict()["review_notes"] == "Parked car, no collision"
        assert services.router.get(capture.id).review_notes == "Parked car, no collision"

    def test_blank_review_notes_stored_as_none(self, services):
        capture = services.router.route(make_jpeg(), analysis(0.6), LOCATION)

        approved = services.router.approve(capture.id, notes="   ")

        assert approved.review_notes is None
        assert approved.reviewed_by is None

    def test_review_twice_is_rejected(self, services):
        capture = services.router.route(make_jpeg(), analysis(0.6), LOCATION)
        services.router.reject(capture.id)

        with pytest.raises(InvalidTransition):
            services.router.approve(capture.id)
        with pytest.raises(InvalidTransition):
            services.router.reject(capture.id)
        assert Incident.query.count() == 0

    def test_cannot_approve_auto_submitted_capture(self, services):
        capture = services.router.route(make_jpeg(), analysis(0.9), LOCATION)
        with pytest.raises(InvalidTransition):
            services.router.approve(capture.id)
        assert Incident.query.count() == 1

    def test_unknown_capture(self, services):
        with pytest.raises(NotFound):
            services.router.approve("cam_missing")

    def test_statistics_and_clear(self, services):
        services.router.route(make_jpeg(), analysis(0.9), LOCATION)
        pending = services.router.route(make_jpeg(), analysis(0.6), LOCATION)
        services.router.route(make_jpeg(), analysis(0.6), LOCATION)
        services.router.route(make_jpeg(), analysis(0.1), LOCATION)
        services.router.reject(pending.id)

        stats = services.router.statistics()
        assert stats["total_captures"] == 4
        assert stats["auto_submitted"] == 1
        assert stats["pending_review"] == 1
        assert stats["rejected"] == 1
        assert stats["discarded"] == 1
        assert len(services.router.pending_review()) == 1

        assert services.router.clear() == 4
        assert services.router.statistics()["total_captures"] == 0
        # Incidents survive clearing the capture log
        assert Incident.query.count() == 1
