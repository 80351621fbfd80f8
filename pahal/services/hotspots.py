"""Hotspot aggregation service.

Keeps per-zone accident counts and risk scores up to date as incidents
land, and aggregates recent incidents into a grid for the heat map.
"""

import logging
import queue
import threading
from collections import Counter, defaultdict
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from pahal import events
from pahal.database import db
from pahal.models import Hotspot, Incident, SeverityLevel
from pahal.services.geolocation import haversine_m

logger = logging.getLogger(__name__)

# Heat map cell size in degrees (about 1.1 km of latitude)
GRID_RESOLUTION = 0.01

MAX_RISK_SCORE = 100.0

# Risk added to a zone per incident, by severity
SEVERITY_WEIGHTS = {
    SeverityLevel.LOW: 1.0,
    SeverityLevel.MEDIUM: 2.0,
    SeverityLevel.HIGH: 4.0,
    SeverityLevel.CRITICAL: 6.0,
}


def find_zone(latitude: float, longitude: float) -> Optional[Hotspot]:
    """First active zone (by id) whose radius contains the point."""
    zones = Hotspot.query.filter_by(is_active=True).order_by(Hotspot.id.asc()).all()
    for zone in zones:
        if haversine_m(latitude, longitude, zone.latitude, zone.longitude) <= zone.radius_meters:
            return zone
    return None


def record_incident(incident: Incident) -> Optional[Hotspot]:
    """
    Count an incident against its enclosing zone.

    The incident's hotspot_id is written in the same commit as the zone
    counters, so replaying the same incident never counts it twice.
    """
    if incident.hotspot_id is not None:
        logger.debug(f"Incident {incident.id} already counted in hotspot {incident.hotspot_id}")
        return None

    zone = find_zone(incident.latitude, incident.longitude)
    if zone is None:
        return None

    occurred_at = incident.created_at or datetime.now(timezone.utc)
    zone.accident_count = (zone.accident_count or 0) + 1
    zone.last_incident_at = occurred_at
    if zone.first_incident_at is None:
        zone.first_incident_at = occurred_at
    zone.risk_score = min(
        (zone.risk_score or 0.0) + SEVERITY_WEIGHTS.get(incident.severity, 1.0),
        MAX_RISK_SCORE,
    )
    incident.hotspot_id = zone.id
    db.session.flush()
    zone.common_accident_types = _common_types(zone.id)

    db.session.commit()
    logger.info(
        f"Incident {incident.id} counted in hotspot '{zone.name}' "
        f"(count={zone.accident_count}, risk={zone.risk_score:.1f})"
    )
    return zone


def _common_types(hotspot_id: int, top: int = 3) -> list:
    counts = Counter(
        row[0].value
        for row in db.session.query(Incident.accident_type).filter(Incident.hotspot_id == hotspot_id)
    )
    return [name for name, _ in counts.most_common(top)]


def list_hotspots(min_risk: Optional[float] = None) -> list:
    query = Hotspot.query.filter_by(is_active=True)
    if min_risk is not None:
        query = query.filter(Hotspot.risk_score >= min_risk)
    return query.order_by(Hotspot.risk_score.desc(), Hotspot.id.asc()).all()


class HotspotWorker:
    """Applies hotspot updates off the request/capture thread.

    Subscribes to INCIDENT_CREATED and processes incident ids from a queue
    inside its own app context.
    """

    def __init__(self, app, bus=None):
        self.app = app
        self._queue = queue.Queue()
        self._thread = None
        self._stop = threading.Event()
        if bus is not None:
            bus.subscribe(events.INCIDENT_CREATED, self._on_incident_created)

    def _on_incident_created(self, payload):
        if payload and payload.get("id") is not None:
            self.submit(payload["id"])

    def submit(self, incident_id: int):
        self._queue.put(incident_id)

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="hotspot-worker", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0):
        self._stop.set()
        self._queue.put(None)
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def drain(self):
        """Process everything queued so far on the calling thread."""
        while True:
            try:
                incident_id = self._queue.get_nowait()
            except queue.Empty:
                return
            if incident_id is not None:
                self._process(incident_id)

    def _run(self):
        while not self._stop.is_set():
            incident_id = self._queue.get()
            if incident_id is None:
                continue
            self._process(incident_id)

    def _process(self, incident_id: int):
        with self.app.app_context():
            try:
                incident = db.session.get(Incident, incident_id)
                if incident is not None:
                    record_incident(incident)
            except SQLAlchemyError as e:
                db.session.rollback()
                logger.error(f"Hotspot update failed for incident {incident_id}: {e}")


def _snap(value: float) -> float:
    return round(round(value / GRID_RESOLUTION) * GRID_RESOLUTION, 5)


def _new_cell():
    return {
        "count": 0,
        "severity_points": 0,
        "confidence_points": 0.0,
        "max_severity": SeverityLevel.LOW,
        "types": Counter(),
    }


def compute_heatmap_data(hours: int = 24) -> list[dict]:
    """
    Grid aggregation of incidents reported in the last ``hours``.

    Each incident weighs as many reports as it consolidated. Cells are
    returned hottest first as {lat, lng, intensity, count, max_severity,
    dominant_type}. With no recent incidents the hotspot zones are
    returned instead.
    """
    since = datetime.now(timezone.utc) - timedelta(hours=hours)
    recent = Incident.query.filter(Incident.created_at >= since).all()
    if not recent:
        return _zone_baseline()

    cells: dict[tuple, dict] = defaultdict(_new_cell)
    for incident in recent:
        cell = cells[(_snap(incident.latitude), _snap(incident.longitude))]
        reports = incident.report_count or 1
        # Reports without AI analysis are taken at face value
        confidence = 1.0 if incident.ai_confidence is None else incident.ai_confidence

        cell["count"] += reports
        cell["severity_points"] += incident.severity.rank * reports
        cell["confidence_points"] += confidence * reports
        cell["types"][incident.accident_type.value] += reports
        if incident.severity.rank > cell["max_severity"].rank:
            cell["max_severity"] = incident.severity

    busiest = max(cell["count"] for cell in cells.values())
    top_rank = SeverityLevel.CRITICAL.rank

    heatmap = []
    for (lat, lng), cell in cells.items():
        density = cell["count"] / busiest
        severity = cell["severity_points"] / (cell["count"] * top_rank)
        confidence = cell["confidence_points"] / cell["count"]
        heatmap.append({
            "lat": lat,
            "lng": lng,
            "intensity": min(round(0.4 * density + 0.4 * severity + 0.2 * confidence, 3), 1.0),
            "count": cell["count"],
            "max_severity": cell["max_severity"].value,
            "dominant_type": cell["types"].most_common(1)[0][0],
        })

    return sorted(heatmap, key=lambda cell: cell["intensity"], reverse=True)


def _zone_baseline() -> list[dict]:
    """Known risk zones at half weight, so the map is never empty."""
    return [
        {
            "lat": round(zone.latitude, 5),
            "lng": round(zone.longitude, 5),
            "intensity": round(min((zone.risk_score or 0.0) / MAX_RISK_SCORE, 1.0) * 0.5, 3),
            "count": 0,
            "max_severity": None,
            "dominant_type": (zone.common_accident_types or [None])[0],
        }
        for zone in list_hotspots()
    ]
