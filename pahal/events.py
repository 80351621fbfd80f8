"""In-process event bus.

Services publish named events (capture completed, camera status, incident
created or updated, responder moved or assigned). The Socket.IO layer and
the hotspot worker subscribe.
"""

import logging
import threading
from collections import defaultdict

logger = logging.getLogger(__name__)

CAPTURE_COMPLETED = "capture_completed"
CAPTURE_FAILED = "capture_failed"
CAMERA_STATUS = "camera_status"
INCIDENT_CREATED = "incident_created"
INCIDENT_CONSOLIDATED = "incident_consolidated"
INCIDENT_UPDATED = "incident_updated"
RESPONDER_UPDATED = "responder_updated"


class EventBus:
    """Synchronous publish/subscribe; subscribers run on the publisher's thread."""

    def __init__(self):
        self._subscribers = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, event: str, callback):
        with self._lock:
            self._subscribers[event].append(callback)

    def unsubscribe(self, event: str, callback):
        with self._lock:
            if callback in self._subscribers.get(event, []):
                self._subscribers[event].remove(callback)

    def publish(self, event: str, payload=None):
        with self._lock:
            callbacks = list(self._subscribers.get(event, []))

        for callback in callbacks:
            try:
                callback(payload)
            except Exception as e:
                logger.error(f"Subscriber for '{event}' failed: {e}", exc_info=True)
