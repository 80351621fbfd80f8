"""Incident lifecycle service.

Owns creation of incidents (citizen reports and promoted camera captures),
duplicate-report consolidation, and the response status machine:

    reported -> acknowledged -> dispatched -> en_route -> on_site -> resolved

Each status can only be reached from its immediate predecessor, and each
step stamps its own timestamp column. ``false_alarm`` is a terminal status
outside the chain, reachable only from ``reported``.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from pahal import events
from pahal.database import db
from pahal.errors import InvalidTransition, NotFound, PersistenceError
from pahal.models import (
    AccidentType,
    Incident,
    IncidentMedia,
    IncidentStatus,
    ReportSource,
    SeverityLevel,
)
from pahal.services.geolocation import haversine_m

logger = logging.getLogger(__name__)

FORWARD_CHAIN = (
    IncidentStatus.REPORTED,
    IncidentStatus.ACKNOWLEDGED,
    IncidentStatus.DISPATCHED,
    IncidentStatus.EN_ROUTE,
    IncidentStatus.ON_SITE,
    IncidentStatus.RESOLVED,
)

TRANSITION_TIMESTAMPS = {
    IncidentStatus.ACKNOWLEDGED: "acknowledged_at",
    IncidentStatus.DISPATCHED: "dispatched_at",
    IncidentStatus.EN_ROUTE: "en_route_at",
    IncidentStatus.ON_SITE: "on_site_at",
    IncidentStatus.RESOLVED: "resolved_at",
}

IN_PROGRESS = (
    IncidentStatus.ACKNOWLEDGED,
    IncidentStatus.DISPATCHED,
    IncidentStatus.EN_ROUTE,
    IncidentStatus.ON_SITE,
)


def next_status(status: IncidentStatus) -> Optional[IncidentStatus]:
    """The only legal forward step from ``status``, or None at the end."""
    if status not in FORWARD_CHAIN:
        return None
    index = FORWARD_CHAIN.index(status)
    return FORWARD_CHAIN[index + 1] if index + 1 < len(FORWARD_CHAIN) else None


def validate_transition(current: IncidentStatus, target: IncidentStatus):
    """Raise InvalidTransition unless ``current -> target`` is allowed."""
    if target == IncidentStatus.FALSE_ALARM:
        if current != IncidentStatus.REPORTED:
            raise InvalidTransition(
                current.value, target.value,
                f"Only a newly reported incident can be marked false_alarm (status is '{current.value}')",
            )
        return

    if next_status(current) != target:
        raise InvalidTransition(current.value, target.value)


def parse_enum(enum_cls, value, field_name):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValueError(f"Invalid {field_name} '{value}' (expected one of: {allowed})") from None


def parse_coordinate(value, field_name, limit):
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"{field_name} is required and must be a number") from None
    if not -limit <= number <= limit:
        raise ValueError(f"{field_name} out of range: {number}")
    return number


@dataclass
class SubmissionResult:
    """Outcome of a report or promoted capture."""
    incident: Incident
    consolidated: bool = False
    media_attached: int = 0
    media_failed: int = 0

    def to_dict(self):
        return {
            "incident": self.incident.to_dict(),
            "consolidated": self.consolidated,
            "media_attached": self.media_attached,
            "media_failed": self.media_failed,
        }


class IncidentLifecycleManager:
    """Creates incidents and drives them through the response lifecycle."""

    def __init__(self, bus=None, media_store=None, geocoder=None, classifier=None, config=None):
        if config is None:
            from pahal.config import Config
            config = Config

        self.bus = bus
        self.media_store = media_store
        self.geocoder = geocoder
        self.classifier = classifier
        self.dedup_enabled = config.DEDUP_ENABLED
        self.dedup_window = timedelta(minutes=config.DEDUP_WINDOW_MINUTES)
        self.dedup_radius_m = config.DEDUP_RADIUS_METERS

    # ---------- Queries ----------

    def get(self, incident_id: int) -> Incident:
        incident = db.session.get(Incident, incident_id)
        if incident is None:
            raise NotFound(f"Incident {incident_id} not found")
        return incident

    def list(self, status=None, severity=None, hours: Optional[int] = None, limit: int = 200):
        query = Incident.query
        if status:
            query = query.filter(Incident.status == parse_enum(IncidentStatus, status, "status"))
        if severity:
            query = query.filter(Incident.severity == parse_enum(SeverityLevel, severity, "severity"))
        if hours:
            since = datetime.now(timezone.utc) - timedelta(hours=hours)
            query = query.filter(Incident.created_at >= since)

        return query.order_by(Incident.created_at.desc(), Incident.id.desc()).limit(limit).all()

    def statistics(self) -> dict:
        rows = db.session.query(Incident.status, Incident.severity).all()
        return {
            "total": len(rows),
            "pending": sum(1 for status, _ in rows if status == IncidentStatus.REPORTED),
            "in_progress": sum(1 for status, _ in rows if status in IN_PROGRESS),
            "resolved": sum(1 for status, _ in rows if status == IncidentStatus.RESOLVED),
            "false_alarm": sum(1 for status, _ in rows if status == IncidentStatus.FALSE_ALARM),
            "critical": sum(
                1 for status, severity in rows
                if severity == SeverityLevel.CRITICAL and not status.is_terminal
            ),
        }

    def find_duplicate(self, accident_type: AccidentType, latitude: float, longitude: float):
        """Nearest open incident of the same type, recent and close enough to be the same event."""
        since = datetime.now(timezone.utc) - self.dedup_window
        candidates = Incident.query.filter(
            Incident.accident_type == accident_type,
            Incident.status.notin_([IncidentStatus.RESOLVED, IncidentStatus.FALSE_ALARM]),
            Incident.created_at >= since,
        ).all()

        best, best_distance = None, None
        for candidate in candidates:
            distance = haversine_m(latitude, longitude, candidate.latitude, candidate.longitude)
            if distance <= self.dedup_radius_m and (best is None or distance < best_distance):
                best, best_distance = candidate, distance
        return best

    # ---------- Creation ----------

    def create(self, fields: dict, source: ReportSource) -> SubmissionResult:
        """Create an incident, or bump report_count on a matching open one."""
        data = self._normalize_fields(fields)

        if self.dedup_enabled:
            duplicate = self.find_duplicate(data["accident_type"], data["latitude"], data["longitude"])
            if duplicate is not None:
                return SubmissionResult(incident=self._consolidate(duplicate), consolidated=True)

        incident = Incident(status=IncidentStatus.REPORTED, source=source, report_count=1, **data)
        try:
            db.session.add(incident)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Failed to create incident: {e}")
            raise PersistenceError("Incident could not be saved") from e

        logger.info(
            f"Incident {incident.id} created: {incident.accident_type.value} / "
            f"{incident.severity.value} from {source.value}"
        )
        self._publish(events.INCIDENT_CREATED, incident)
        return SubmissionResult(incident=incident)

    def submit_report(self, fields: dict, photos=None, analyze: bool = False) -> SubmissionResult:
        """Citizen report with optional photos.

        With ``analyze=True`` the first photo is classified and the result
        fills the AI fields (and type/severity when the reporter left them out).
        Photo upload failures never fail the submission.
        """
        photos = [p for p in (photos or []) if p]
        fields = dict(fields)

        if analyze and photos and self.classifier is not None:
            analysis = self.classifier.analyze_image(photos[0])
            suggested = {
                "accident_type": analysis.category.value,
                "severity": analysis.severity.value,
                "title": analysis.title,
                "description": analysis.description,
            }
            for key, value in suggested.items():
                if not fields.get(key):
                    fields[key] = value
            fields.update(
                ai_confidence=analysis.confidence,
                ai_analysis=analysis.to_dict(),
                is_ai_verified=True,
                vehicles_involved=analysis.vehicles_involved or 1,
                estimated_casualties=analysis.estimated_casualties,
            )

        if not fields.get("address") and self.geocoder is not None:
            try:
                lat = float(fields.get("latitude"))
                lng = float(fields.get("longitude"))
            except (TypeError, ValueError):
                pass  # reported by _normalize_fields
            else:
                fields["address"] = self.geocoder.resolve_address(lat, lng)

        result = self.create(fields, ReportSource.CITIZEN_APP)
        result.media_attached, result.media_failed = self.attach_media(
            result.incident, photos, ReportSource.CITIZEN_APP
        )
        return result

    def create_from_capture(self, capture, analysis, image: Optional[bytes]) -> SubmissionResult:
        """Promote an auto-submitted or approved camera capture."""
        fields = {
            "title": analysis.get("title") or "Smart camera detection",
            "description": analysis.get("description"),
            "accident_type": analysis.get("category", AccidentType.OTHER.value),
            "severity": analysis.get("severity", SeverityLevel.MEDIUM.value),
            "latitude": capture.latitude,
            "longitude": capture.longitude,
            "address": capture.address,
            "ai_confidence": capture.confidence,
            "ai_analysis": analysis,
            "is_ai_verified": True,
            "vehicles_involved": analysis.get("vehicles_involved") or 1,
            "estimated_casualties": analysis.get("estimated_casualties") or 0,
        }
        result = self.create(fields, ReportSource.SMART_CAMERA)
        result.media_attached, result.media_failed = self.attach_media(
            result.incident, [image] if image else [], ReportSource.SMART_CAMERA
        )
        return result

    def attach_media(self, incident: Incident, photos, source: ReportSource) -> tuple:
        """Upload photos in order; the first one becomes primary if none exists yet.

        Returns (attached, failed). Never raises.
        """
        if not photos:
            return 0, 0
        if self.media_store is None:
            logger.warning(f"No media store configured, dropping {len(photos)} photo(s) for incident {incident.id}")
            return 0, len(photos)

        position = len(incident.media)
        attached = failed = 0
        for data in photos:
            is_primary = position == 0
            url = self.media_store.store_blob(f"incidents/{incident.id}", data, is_primary=is_primary)
            if url is None:
                failed += 1
                continue

            try:
                db.session.add(IncidentMedia(
                    incident_id=incident.id,
                    file_url=url,
                    file_size=len(data),
                    position=position,
                    is_primary=is_primary,
                    source=source,
                ))
                db.session.commit()
            except SQLAlchemyError as e:
                db.session.rollback()
                logger.error(f"Failed to record media for incident {incident.id}: {e}")
                failed += 1
                continue

            position += 1
            attached += 1

        if failed:
            logger.warning(f"{attached}/{attached + failed} photos attached to incident {incident.id}")
        return attached, failed

    # ---------- Lifecycle ----------

    def advance(self, incident_id: int, notes: Optional[str] = None) -> Incident:
        """Move one step forward along the response chain."""
        incident = self.get(incident_id)
        target = next_status(incident.status)
        if target is None:
            raise InvalidTransition(incident.status.value, "next", f"Incident {incident_id} is already {incident.status.value}")
        return self._apply_transition(incident, target, notes)

    def transition(self, incident_id: int, target, notes: Optional[str] = None) -> Incident:
        """Move to an explicit status; rejected without writing if not the next step."""
        target = parse_enum(IncidentStatus, target, "status")
        incident = self.get(incident_id)
        return self._apply_transition(incident, target, notes)

    def mark_false_alarm(self, incident_id: int, notes: Optional[str] = None) -> Incident:
        return self.transition(incident_id, IncidentStatus.FALSE_ALARM, notes)

    def reassign_severity(self, incident_id: int, severity) -> Incident:
        severity = parse_enum(SeverityLevel, severity, "severity")
        incident = self._get_open(incident_id, "change severity of")
        incident.severity = severity
        self._commit(f"update severity of incident {incident_id}")

        logger.info(f"Incident {incident_id} severity set to {severity.value}")
        self._publish(events.INCIDENT_UPDATED, incident)
        return incident

    def update_notes(self, incident_id: int, notes: Optional[str]) -> Incident:
        incident = self._get_open(incident_id, "edit notes of")
        incident.resolution_notes = notes
        self._commit(f"update notes of incident {incident_id}")
        self._publish(events.INCIDENT_UPDATED, incident)
        return incident

    # ---------- Internals ----------

    def _get_open(self, incident_id, action):
        incident = self.get(incident_id)
        if incident.status.is_terminal:
            raise InvalidTransition(
                incident.status.value, incident.status.value,
                f"Cannot {action} incident {incident_id}: status is {incident.status.value}",
            )
        return incident

    def _apply_transition(self, incident: Incident, target: IncidentStatus, notes):
        validate_transition(incident.status, target)

        previous = incident.status
        incident.status = target
        stamp_field = TRANSITION_TIMESTAMPS.get(target)
        if stamp_field:
            setattr(incident, stamp_field, datetime.now(timezone.utc))
        if notes is not None:
            incident.resolution_notes = notes

        self._commit(f"move incident {incident.id} to {target.value}")
        logger.info(f"Incident {incident.id}: {previous.value} -> {target.value}")
        self._publish(events.INCIDENT_UPDATED, incident)
        return incident

    def _consolidate(self, incident: Incident) -> Incident:
        incident.report_count = Incident.report_count + 1
        self._commit(f"consolidate report into incident {incident.id}")

        logger.info(f"Duplicate report consolidated into incident {incident.id} (count={incident.report_count})")
        self._publish(events.INCIDENT_CONSOLIDATED, incident)
        return incident

    def _commit(self, action: str):
        try:
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Failed to {action}: {e}")
            raise PersistenceError(f"Failed to {action}") from e

    def _publish(self, event: str, incident: Incident):
        if self.bus is not None:
            self.bus.publish(event, incident.to_dict())

    @staticmethod
    def _normalize_fields(fields: dict) -> dict:
        for required in ("accident_type", "severity"):
            if not fields.get(required):
                raise ValueError(f"{required} is required")
        accident_type = parse_enum(AccidentType, fields["accident_type"], "accident_type")
        severity = parse_enum(SeverityLevel, fields["severity"], "severity")

        title = (fields.get("title") or "").strip() or f"{accident_type.label} Report"
        return {
            "title": title[:256],
            "description": fields.get("description"),
            "accident_type": accident_type,
            "severity": severity,
            "latitude": parse_coordinate(fields.get("latitude"), "latitude", 90),
            "longitude": parse_coordinate(fields.get("longitude"), "longitude", 180),
            "address": fields.get("address"),
            "ai_confidence": fields.get("ai_confidence"),
            "ai_analysis": fields.get("ai_analysis"),
            "is_ai_verified": bool(fields.get("is_ai_verified", False)),
            "vehicles_involved": max(int(fields.get("vehicles_involved") or 1), 0),
            "estimated_casualties": max(int(fields.get("estimated_casualties") or 0), 0),
            "reporter_name": fields.get("reporter_name"),
            "reporter_phone": fields.get("reporter_phone"),
        }
