"""
Smart camera monitor tests: capture cycle, overlap handling, start/stop,
and the housekeeping broadcast.
"""

import threading
from unittest.mock import Mock, patch

import numpy as np
import pytest

from conftest import FakeGeocoder
from pahal.errors import PersistenceError
from pahal.models import Capture, Disposition, Incident
from pahal.services.camera_ingester import DeviceFrameGrabber
from pahal.services.geolocation import Geolocator, HttpPositionProvider, NullPositionProvider


def statuses(published):
    return [payload["message"] for event, payload in published if event == "camera_status"]


class TestCaptureCycle:
    def test_manual_capture_auto_submits(self, services, published):
        capture = services.monitor.capture_now()

        assert capture.disposition is Disposition.AUTO_SUBMIT
        assert capture.address == "Kashmere Gate, Delhi"
        assert Incident.query.count() == 1
        assert services.monitor.last_capture_at is not None
        messages = statuses(published)
        assert messages[:2] == ["Capturing frame...", "Analyzing image..."]
        assert messages[-1] == "Incident detected! Auto-submitting (90% confidence)"

    def test_pending_review_status_message(self, services, classifier, published):
        classifier.result.confidence = 0.6
        capture = services.monitor.capture_now()

        assert capture.disposition is Disposition.PENDING_REVIEW
        assert statuses(published)[-1] == "Potential incident - needs review (60% confidence)"

    def test_no_location_discards(self, services):
        services.monitor.geolocator = Geolocator(NullPositionProvider(), FakeGeocoder())

        capture = services.monitor.capture_now()

        assert capture.disposition is Disposition.DISCARD
        assert Incident.query.count() == 0

    @pytest.mark.parametrize("reply", [
        ["28.6", "77.2"],
        {"lat": 200.0, "lon": 77.2},
        {"lat": "nan", "lon": 77.2},
    ])
    def test_unusable_position_reply_still_records_capture(self, services, reply):
        session = Mock()
        session.get.return_value.raise_for_status.return_value = None
        session.get.return_value.json.return_value = reply
        services.monitor.geolocator = Geolocator(
            HttpPositionProvider("http://geo", session=session), FakeGeocoder()
        )

        capture = services.monitor.capture_now()

        assert capture.disposition is Disposition.DISCARD
        assert capture.latitude is None
        assert Capture.query.count() == 1
        assert Incident.query.count() == 0

    def test_location_tracking_disabled_discards(self, services):
        services.settings.update(location_tracking=False)
        assert services.monitor.capture_now().disposition is Disposition.DISCARD

    def test_grab_failure(self, services, grabber, classifier, published):
        grabber.frame = None

        assert services.monitor.capture_now() is None
        assert classifier.calls == 0
        assert any(event == "capture_failed" for event, _ in published)
        assert statuses(published)[-1] == "Error: Failed to capture frame"

    def test_persistence_failure_is_reported(self, services, published):
        with patch.object(services.router, "route", side_effect=PersistenceError("db locked")):
            assert services.monitor.capture_now() is None

        failed = [payload for event, payload in published if event == "capture_failed"]
        assert failed[0]["error"] == "db locked"


class TestOverlap:
    def test_manual_trigger_dropped_while_busy(self, services, classifier):
        services.monitor._busy.acquire()
        try:
            assert services.monitor.is_capturing
            assert services.monitor.capture_now() is None
        finally:
            services.monitor._busy.release()
        assert classifier.calls == 0

    def test_tick_dropped_while_busy(self, services):
        services.monitor._busy.acquire()
        try:
            services.monitor._tick()
            services.monitor._tick()
        finally:
            services.monitor._busy.release()
        assert services.monitor.dropped_ticks == 2

    def test_tick_runs_cycle_on_worker_thread(self, services):
        services.monitor._tick()

        # The worker holds the busy lock until the cycle is finished
        assert services.monitor._busy.acquire(timeout=10)
        services.monitor._busy.release()
        assert services.router.statistics()["auto_submitted"] == 1

    def test_stop_lets_in_flight_cycle_finish(self, services, classifier):
        monitor = services.monitor
        gate = threading.Event()
        original = classifier.analyze_image

        def slow_analyze(image):
            gate.wait(10)
            return original(image)

        classifier.analyze_image = slow_analyze
        monitor.warmup_seconds = 60
        monitor.start()
        monitor._tick()

        monitor.stop()
        gate.set()

        assert monitor._busy.acquire(timeout=10)
        monitor._busy.release()
        assert not monitor.is_active
        assert services.router.statistics()["auto_submitted"] == 1
        assert Capture.query.count() == 1
        assert Incident.query.count() == 1


class TestStartStop:
    def test_stop_when_never_started(self, services, grabber, published):
        services.monitor.stop()
        services.monitor.stop()

        assert not services.monitor.is_active
        assert grabber.released == 2
        assert "Camera stopped" not in statuses(published)

    def test_start_then_stop(self, services, grabber, published):
        services.monitor.warmup_seconds = 60
        services.monitor.start()
        services.monitor.start()
        assert services.monitor.is_active
        assert grabber.opened == 1

        services.monitor.stop()
        assert not services.monitor.is_active
        assert statuses(published) == ["Camera active - monitoring started", "Camera stopped"]

    def test_manual_capture_while_stopped_releases_device(self, services):
        device = Mock()
        device.isOpened.return_value = True
        device.read.return_value = (True, np.zeros((48, 64, 3), dtype=np.uint8))
        grabber = DeviceFrameGrabber(0)
        services.monitor.grabber = grabber

        with patch("pahal.services.camera_ingester.cv2.VideoCapture", return_value=device):
            capture = services.monitor.capture_now()

        assert capture is not None
        assert not grabber.is_open
        device.release.assert_called_once()

    def test_manual_capture_while_active_keeps_device(self, services, grabber):
        services.monitor.warmup_seconds = 60
        services.monitor.start()
        try:
            services.monitor.capture_now()
            assert grabber.released == 0
        finally:
            services.monitor.stop()
        assert grabber.released == 1

    def test_start_failure_propagates(self, services, grabber):
        grabber.open = Mock(side_effect=RuntimeError("Camera device 0 could not be opened"))
        with pytest.raises(RuntimeError):
            services.monitor.start()
        assert not services.monitor.is_active

    def test_status(self, services):
        status = services.monitor.status()
        assert status["is_active"] is False
        assert status["is_capturing"] is False
        assert status["settings"]["auto_submit_threshold"] == 0.80


def test_housekeeping_broadcast(services):
    services.monitor.capture_now()
    services.housekeeping.socketio = Mock()

    stats = services.housekeeping.broadcast_live_stats()

    assert stats["incidents"]["total"] == 1
    assert stats["captures"]["auto_submitted"] == 1
    emitted = [c.args[0] for c in services.housekeeping.socketio.emit.call_args_list]
    assert emitted == ["stats_update", "heatmap_update"]
