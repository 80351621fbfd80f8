"""Capture triage.

Routes each classified capture to one of three dispositions:

    no location                      -> DISCARD
    confidence >= auto_submit        -> AUTO_SUBMIT     (incident created)
    confidence >= manual_review      -> PENDING_REVIEW  (operator approves/rejects)
    otherwise                        -> DISCARD

Thresholds are inclusive lower bounds and come from the injected
CaptureSettings, read once per capture.
"""

import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from pahal import events
from pahal.config import SettingsSnapshot
from pahal.database import db
from pahal.errors import InvalidTransition, NotFound, PersistenceError
from pahal.models import Capture, Disposition

logger = logging.getLogger(__name__)


def decide_disposition(confidence: float, has_location: bool, settings: SettingsSnapshot) -> Disposition:
    """Pure routing rule for one capture."""
    if not has_location:
        # Nowhere to send responders
        return Disposition.DISCARD
    if confidence >= settings.auto_submit_threshold:
        return Disposition.AUTO_SUBMIT
    if confidence >= settings.manual_review_threshold:
        return Disposition.PENDING_REVIEW
    return Disposition.DISCARD


def _clean_text(value) -> Optional[str]:
    if value is None:
        return None
    return str(value).strip() or None


def new_capture_id() -> str:
    return f"cam_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class TriageRouter:
    """Records capture outcomes and promotes qualifying captures to incidents."""

    def __init__(self, settings, incidents, media_store=None, bus=None):
        self.settings = settings
        self.incidents = incidents
        self.media_store = media_store
        self.bus = bus

    def route(self, image: bytes, analysis, location=None, captured_at: Optional[datetime] = None,
              capture_id: Optional[str] = None) -> Capture:
        """Decide and record the disposition of one classified capture."""
        snapshot = self.settings.snapshot()
        disposition = decide_disposition(analysis.confidence, location is not None, snapshot)

        capture = Capture(
            id=capture_id or new_capture_id(),
            captured_at=captured_at or datetime.now(timezone.utc),
            latitude=location.lat if location else None,
            longitude=location.lng if location else None,
            address=location.address if location else None,
            analysis=analysis.to_dict(),
            confidence=analysis.confidence,
            degraded=analysis.degraded,
            disposition=disposition,
        )
        if location is None:
            capture.error = "No location available"

        if disposition in (Disposition.AUTO_SUBMIT, Disposition.PENDING_REVIEW):
            if self.media_store is not None:
                capture.image_url = self.media_store.store_blob(f"captures/{capture.id}", image, is_primary=True)

        if disposition is Disposition.AUTO_SUBMIT:
            try:
                result = self.incidents.create_from_capture(capture, capture.analysis, image)
            except PersistenceError as e:
                capture.error = str(e)
                self._save(capture)
                raise
            capture.incident_id = result.incident.id

        self._save(capture)
        logger.info(
            f"Capture {capture.id}: {disposition.value} "
            f"(confidence={analysis.confidence:.2f}{', degraded' if analysis.degraded else ''})"
        )
        self._publish(capture)
        return capture

    # ---------- Review ----------

    def approve(self, capture_id: str, notes: Optional[str] = None, reviewer: Optional[str] = None) -> Capture:
        """Promote a pending capture to an incident."""
        capture = self._get_pending(capture_id, Disposition.APPROVED)

        image = None
        if self.media_store is not None and capture.image_url:
            image = self.media_store.read_blob(capture.image_url)

        result = self.incidents.create_from_capture(capture, capture.analysis or {}, image)
        capture.disposition = Disposition.APPROVED
        capture.incident_id = result.incident.id
        self._mark_reviewed(capture, notes, reviewer)
        self._commit(f"approve capture {capture_id}")

        logger.info(f"Capture {capture_id} approved as incident {result.incident.id}")
        self._publish(capture)
        return capture

    def reject(self, capture_id: str, notes: Optional[str] = None, reviewer: Optional[str] = None) -> Capture:
        capture = self._get_pending(capture_id, Disposition.REJECTED)
        capture.disposition = Disposition.REJECTED
        self._mark_reviewed(capture, notes, reviewer)
        self._commit(f"reject capture {capture_id}")

        logger.info(f"Capture {capture_id} rejected")
        self._publish(capture)
        return capture

    # ---------- Queries ----------

    def get(self, capture_id: str) -> Capture:
        capture = db.session.get(Capture, capture_id)
        if capture is None:
            raise NotFound(f"Capture {capture_id} not found")
        return capture

    def recent(self, limit: int = 100, disposition=None):
        query = Capture.query
        if disposition:
            query = query.filter(Capture.disposition == Disposition(disposition))
        return query.order_by(Capture.captured_at.desc()).limit(limit).all()

    def pending_review(self):
        return self.recent(limit=1000, disposition=Disposition.PENDING_REVIEW)

    def statistics(self) -> dict:
        counts = dict(
            db.session.query(Capture.disposition, func.count(Capture.id))
            .group_by(Capture.disposition)
            .all()
        )
        return {
            "total_captures": sum(counts.values()),
            "auto_submitted": counts.get(Disposition.AUTO_SUBMIT, 0),
            "pending_review": counts.get(Disposition.PENDING_REVIEW, 0),
            "discarded": counts.get(Disposition.DISCARD, 0),
            "approved": counts.get(Disposition.APPROVED, 0),
            "rejected": counts.get(Disposition.REJECTED, 0),
            "degraded": Capture.query.filter(Capture.degraded.is_(True)).count(),
        }

    def clear(self) -> int:
        """Drop the capture log. Incidents created from captures are kept."""
        removed = Capture.query.delete()
        self._commit("clear capture log")
        logger.info(f"Cleared {removed} captures")
        return removed

    # ---------- Internals ----------

    def _get_pending(self, capture_id, requested: Disposition) -> Capture:
        capture = self.get(capture_id)
        if capture.disposition is not Disposition.PENDING_REVIEW:
            raise InvalidTransition(
                capture.disposition.value, requested.value,
                f"Capture {capture_id} is {capture.disposition.value}, not pending review",
            )
        return capture

    @staticmethod
    def _mark_reviewed(capture: Capture, notes, reviewer):
        capture.reviewed_at = datetime.now(timezone.utc)
        capture.review_notes = _clean_text(notes)
        capture.reviewed_by = _clean_text(reviewer)

    def _save(self, capture: Capture):
        try:
            db.session.add(capture)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Failed to record capture {capture.id}: {e}")
            raise PersistenceError(f"Capture {capture.id} could not be recorded") from e

    def _commit(self, action: str):
        try:
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Failed to {action}: {e}")
            raise PersistenceError(f"Failed to {action}") from e

    def _publish(self, capture: Capture):
        if self.bus is not None:
            self.bus.publish(events.CAPTURE_COMPLETED, capture.to_dict())
