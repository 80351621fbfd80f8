"""Background jobs.

1. Smart camera monitor: timer thread that triggers capture cycles
   (grab frame -> locate -> classify -> triage).
2. Housekeeping: periodic stats broadcast.
"""

import logging
import threading
from contextlib import nullcontext
from datetime import datetime, timezone

from flask import has_app_context

from pahal import events
from pahal.errors import PersistenceError
from pahal.services.triage import new_capture_id

logger = logging.getLogger(__name__)

_DISPOSITION_MESSAGES = {
    "auto_submit": "Incident detected! Auto-submitting ({pct}% confidence)",
    "pending_review": "Potential incident - needs review ({pct}% confidence)",
    "discard": "No incident detected ({pct}% confidence)",
}


class SmartCameraMonitor:
    """Drives capture cycles for one camera.

    At most one cycle is in flight at a time. A scheduled tick or manual
    trigger that arrives while a cycle is running is dropped.
    """

    def __init__(self, app, grabber, geolocator, classifier, router, settings, bus=None,
                 warmup_seconds: float = 1.0):
        self.app = app
        self.grabber = grabber
        self.geolocator = geolocator
        self.classifier = classifier
        self.router = router
        self.settings = settings
        self.bus = bus
        self.warmup_seconds = warmup_seconds

        self._busy = threading.Lock()
        self._state_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._timer_thread = None
        self.dropped_ticks = 0
        self.last_capture_at = None

    # ---------- Control ----------

    @property
    def is_active(self) -> bool:
        with self._state_lock:
            return self._timer_thread is not None and self._timer_thread.is_alive()

    @property
    def is_capturing(self) -> bool:
        return self._busy.locked()

    def start(self):
        """Begin scheduled captures. No-op if already running."""
        with self._state_lock:
            if self._timer_thread is not None and self._timer_thread.is_alive():
                return
            self.grabber.open()
            stop_event = threading.Event()
            self._stop_event = stop_event
            self._timer_thread = threading.Thread(
                target=self._timer_loop, args=(stop_event,), name="smart-camera-timer", daemon=True
            )
            self._timer_thread.start()

        interval = self.settings.snapshot().capture_interval_seconds
        logger.info(f"Smart camera monitoring started (every {interval:.0f}s)")
        self._status("Camera active - monitoring started")

    def stop(self):
        """Cancel the schedule and release the camera. Safe to call repeatedly.

        A cycle already in flight is allowed to finish.
        """
        with self._state_lock:
            was_running = self._timer_thread is not None
            self._stop_event.set()
            self._timer_thread = None

        self.grabber.release()
        if was_running:
            logger.info("Smart camera monitoring stopped")
            self._status("Camera stopped")

    def capture_now(self):
        """Run one capture cycle on the calling thread.

        Returns the recorded Capture, or None if another cycle was in flight
        or no frame could be acquired. When monitoring is off, the camera is
        released again once the cycle ends.
        """
        if not self._busy.acquire(blocking=False):
            logger.debug("Capture already in progress, manual trigger dropped")
            return None
        try:
            return self._run_cycle()
        finally:
            self._busy.release()
            self._release_if_idle()

    def status(self) -> dict:
        return {
            "is_active": self.is_active,
            "is_capturing": self.is_capturing,
            "dropped_ticks": self.dropped_ticks,
            "last_capture_at": self.last_capture_at.isoformat() if self.last_capture_at else None,
            "settings": self.settings.snapshot().to_dict(),
        }

    # ---------- Internals ----------

    def _timer_loop(self, stop_event: threading.Event):
        if stop_event.wait(self.warmup_seconds):
            return
        while not stop_event.is_set():
            self._tick()
            # Interval is re-read each tick so operator changes apply to the next wait
            if stop_event.wait(self.settings.snapshot().capture_interval_seconds):
                return

    def _tick(self):
        if not self._busy.acquire(blocking=False):
            self.dropped_ticks += 1
            logger.debug("Previous capture still in flight, tick dropped")
            return
        worker = threading.Thread(target=self._worker, name="smart-camera-capture", daemon=True)
        try:
            worker.start()
        except RuntimeError:
            self._busy.release()
            raise

    def _worker(self):
        try:
            self._run_cycle()
        except Exception as e:
            logger.error(f"Capture cycle error: {e}", exc_info=True)
        finally:
            self._busy.release()
            self._release_if_idle()

    def _release_if_idle(self):
        # A grab reopens the device lazily; hand it back unless the schedule is running
        with self._state_lock:
            if self._timer_thread is None or not self._timer_thread.is_alive():
                self.grabber.release()

    def _run_cycle(self):
        self._status("Capturing frame...")
        captured_at = datetime.now(timezone.utc)
        capture_id = new_capture_id()

        image = self.grabber.grab()
        if not image:
            logger.warning("Failed to capture frame")
            self._status("Error: Failed to capture frame")
            self._publish(events.CAPTURE_FAILED, {"id": capture_id, "error": "Failed to capture frame"})
            return None

        location = None
        if self.settings.snapshot().location_tracking:
            location = self.geolocator.locate()

        self._status("Analyzing image...")
        analysis = self.classifier.analyze_image(image)

        app_context = nullcontext() if has_app_context() else self.app.app_context()
        with app_context:
            try:
                capture = self.router.route(
                    image, analysis, location, captured_at=captured_at, capture_id=capture_id
                )
            except PersistenceError as e:
                logger.error(f"Capture {capture_id} could not be persisted: {e}")
                self._status(f"Error: {e}")
                self._publish(events.CAPTURE_FAILED, {"id": capture_id, "error": str(e)})
                return None

            self.last_capture_at = captured_at
            pct = round(analysis.confidence * 100)
            self._status(_DISPOSITION_MESSAGES[capture.disposition.value].format(pct=pct))
            return capture

    def _status(self, message: str):
        self._publish(events.CAMERA_STATUS, {
            "message": message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    def _publish(self, event, payload):
        if self.bus is not None:
            self.bus.publish(event, payload)


# ---------- Housekeeping ----------

class HousekeepingLoop:
    """Broadcasts live incident and capture stats at a fixed cadence."""

    def __init__(self, app, incidents, router, socketio, interval_seconds: int = 60):
        self.app = app
        self.incidents = incidents
        self.router = router
        self.socketio = socketio
        self.interval_seconds = interval_seconds
        self._stop_event = threading.Event()
        self._thread = None

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="housekeeping", daemon=True)
        self._thread.start()

    def stop(self):
        self._stop_event.set()

    def _run(self):
        while not self._stop_event.wait(self.interval_seconds):
            try:
                with self.app.app_context():
                    self.broadcast_live_stats()
            except Exception as e:
                logger.error(f"Housekeeping loop error: {e}", exc_info=True)

    def broadcast_live_stats(self):
        from pahal.routes.websocket import broadcast_heatmap_update, broadcast_stats_update
        from pahal.services.hotspots import compute_heatmap_data

        now = datetime.now(timezone.utc).isoformat()
        stats = {
            "incidents": self.incidents.statistics(),
            "captures": self.router.statistics(),
            "timestamp": now,
        }
        broadcast_stats_update(self.socketio, stats)
        broadcast_heatmap_update(self.socketio, {
            "heatmap": compute_heatmap_data(hours=24),
            "generated_at": now,
        })
        return stats
