"""Database models for Pahal."""

import enum
from datetime import datetime, timezone

from pahal.database import db


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


# ---------- Enumerations ----------

class AccidentType(str, enum.Enum):
    VEHICLE_COLLISION = "vehicle_collision"
    PEDESTRIAN_HIT = "pedestrian_hit"
    MOTORCYCLE_ACCIDENT = "motorcycle_accident"
    TRUCK_ACCIDENT = "truck_accident"
    MULTI_VEHICLE = "multi_vehicle"
    HIT_AND_RUN = "hit_and_run"
    BUS_ACCIDENT = "bus_accident"
    AUTO_RICKSHAW = "auto_rickshaw"
    BICYCLE_ACCIDENT = "bicycle_accident"
    OTHER = "other"

    @property
    def label(self):
        return self.value.replace("_", " ").capitalize()


class SeverityLevel(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self):
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    SeverityLevel.LOW: 1,
    SeverityLevel.MEDIUM: 2,
    SeverityLevel.HIGH: 3,
    SeverityLevel.CRITICAL: 4,
}


class IncidentStatus(str, enum.Enum):
    REPORTED = "reported"
    ACKNOWLEDGED = "acknowledged"
    DISPATCHED = "dispatched"
    EN_ROUTE = "en_route"
    ON_SITE = "on_site"
    RESOLVED = "resolved"
    FALSE_ALARM = "false_alarm"

    @property
    def is_terminal(self):
        return self in (IncidentStatus.RESOLVED, IncidentStatus.FALSE_ALARM)


class ReportSource(str, enum.Enum):
    CITIZEN_APP = "citizen_app"
    SMART_CAMERA = "smart_camera"


class Disposition(str, enum.Enum):
    AUTO_SUBMIT = "auto_submit"
    PENDING_REVIEW = "pending_review"
    DISCARD = "discard"
    # Outcomes of human review of a PENDING_REVIEW capture
    APPROVED = "approved"
    REJECTED = "rejected"


class ResponderType(str, enum.Enum):
    AMBULANCE = "ambulance"
    FIRE = "fire"
    POLICE = "police"
    TRAFFIC = "traffic"
    HIGHWAY_PATROL = "highway_patrol"
    TOW_TRUCK = "tow_truck"


def _enum_column(enum_cls, **kwargs):
    return db.Column(
        db.Enum(
            enum_cls,
            native_enum=False,
            validate_strings=True,
            length=32,
            values_callable=lambda members: [m.value for m in members],
        ),
        **kwargs,
    )


# ---------- Models ----------

class Incident(db.Model):
    """A reported or camera-detected road accident."""

    __tablename__ = "incidents"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(256), nullable=False)
    description = db.Column(db.Text)
    accident_type = _enum_column(AccidentType, nullable=False, index=True)
    severity = _enum_column(SeverityLevel, nullable=False)
    status = _enum_column(
        IncidentStatus, nullable=False, default=IncidentStatus.REPORTED, index=True
    )
    latitude = db.Column(db.Float, nullable=False)
    longitude = db.Column(db.Float, nullable=False)
    address = db.Column(db.String(512))
    source = _enum_column(ReportSource, nullable=False)
    ai_confidence = db.Column(db.Float)
    ai_analysis = db.Column(db.JSON)
    is_ai_verified = db.Column(db.Boolean, default=False)
    vehicles_involved = db.Column(db.Integer, default=1)
    estimated_casualties = db.Column(db.Integer, default=0)
    reporter_name = db.Column(db.String(128))
    reporter_phone = db.Column(db.String(32))
    report_count = db.Column(db.Integer, nullable=False, default=1)
    hotspot_id = db.Column(db.Integer, db.ForeignKey("hotspots.id"), index=True)

    acknowledged_at = db.Column(db.DateTime)
    dispatched_at = db.Column(db.DateTime)
    en_route_at = db.Column(db.DateTime)
    on_site_at = db.Column(db.DateTime)
    resolved_at = db.Column(db.DateTime)
    resolution_notes = db.Column(db.Text)

    created_at = db.Column(db.DateTime, default=_utcnow, nullable=False, index=True)
    updated_at = db.Column(db.DateTime, default=_utcnow, onupdate=_utcnow)

    media = db.relationship(
        "IncidentMedia",
        backref="incident",
        order_by="IncidentMedia.position",
        lazy="selectin",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "accident_type": self.accident_type.value,
            "severity": self.severity.value,
            "status": self.status.value,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "address": self.address,
            "source": self.source.value,
            "ai_confidence": self.ai_confidence,
            "ai_analysis": self.ai_analysis,
            "is_ai_verified": self.is_ai_verified,
            "vehicles_involved": self.vehicles_involved,
            "estimated_casualties": self.estimated_casualties,
            "reporter_name": self.reporter_name,
            "report_count": self.report_count,
            "hotspot_id": self.hotspot_id,
            "media": [m.to_dict() for m in self.media],
            "acknowledged_at": _iso(self.acknowledged_at),
            "dispatched_at": _iso(self.dispatched_at),
            "en_route_at": _iso(self.en_route_at),
            "on_site_at": _iso(self.on_site_at),
            "resolved_at": _iso(self.resolved_at),
            "resolution_notes": self.resolution_notes,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @property
    def is_open(self):
        return not self.status.is_terminal


class IncidentMedia(db.Model):
    """A photo attached to an incident; position 0 is the primary image."""

    __tablename__ = "incident_media"

    id = db.Column(db.Integer, primary_key=True)
    incident_id = db.Column(db.Integer, db.ForeignKey("incidents.id"), nullable=False, index=True)
    file_url = db.Column(db.String(512), nullable=False)
    file_type = db.Column(db.String(64), default="image/jpeg")
    file_size = db.Column(db.Integer)
    position = db.Column(db.Integer, nullable=False, default=0)
    is_primary = db.Column(db.Boolean, default=False)
    source = _enum_column(ReportSource)
    created_at = db.Column(db.DateTime, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "file_url": self.file_url,
            "file_type": self.file_type,
            "file_size": self.file_size,
            "is_primary": self.is_primary,
        }


class Capture(db.Model):
    """One smart camera acquisition and its routing outcome."""

    __tablename__ = "captures"

    id = db.Column(db.String(64), primary_key=True)
    image_url = db.Column(db.String(512))
    captured_at = db.Column(db.DateTime, nullable=False, index=True)
    latitude = db.Column(db.Float)
    longitude = db.Column(db.Float)
    address = db.Column(db.String(512))
    analysis = db.Column(db.JSON)
    confidence = db.Column(db.Float)
    degraded = db.Column(db.Boolean, default=False)
    disposition = _enum_column(Disposition, nullable=False, index=True)
    incident_id = db.Column(db.Integer, db.ForeignKey("incidents.id"))
    reviewed_at = db.Column(db.DateTime)
    reviewed_by = db.Column(db.String(128))
    review_notes = db.Column(db.Text)
    error = db.Column(db.Text)

    incident = db.relationship("Incident")

    def to_dict(self):
        location = None
        if self.latitude is not None and self.longitude is not None:
            location = {"lat": self.latitude, "lng": self.longitude, "address": self.address}
        return {
            "id": self.id,
            "image_url": self.image_url,
            "captured_at": _iso(self.captured_at),
            "location": location,
            "analysis": self.analysis,
            "confidence": self.confidence,
            "degraded": self.degraded,
            "disposition": self.disposition.value,
            "incident_id": self.incident_id,
            "reviewed_at": _iso(self.reviewed_at),
            "reviewed_by": self.reviewed_by,
            "review_notes": self.review_notes,
            "error": self.error,
        }


class Hotspot(db.Model):
    """A fixed accident-prone zone with running statistics."""

    __tablename__ = "hotspots"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(256), nullable=False, unique=True)
    description = db.Column(db.Text)
    latitude = db.Column(db.Float, nullable=False)
    longitude = db.Column(db.Float, nullable=False)
    radius_meters = db.Column(db.Float, nullable=False, default=500)
    accident_count = db.Column(db.Integer, nullable=False, default=0)
    risk_score = db.Column(db.Float, nullable=False, default=0.0)
    common_accident_types = db.Column(db.JSON, default=list)
    first_incident_at = db.Column(db.DateTime)
    last_incident_at = db.Column(db.DateTime)
    is_active = db.Column(db.Boolean, default=True, index=True)
    created_at = db.Column(db.DateTime, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "radius_meters": self.radius_meters,
            "accident_count": self.accident_count,
            "risk_score": round(self.risk_score or 0.0, 1),
            "common_accident_types": self.common_accident_types or [],
            "first_incident_at": _iso(self.first_incident_at),
            "last_incident_at": _iso(self.last_incident_at),
            "is_active": self.is_active,
        }


class Responder(db.Model):
    """An emergency unit that can be sent to incidents."""

    __tablename__ = "responders"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(128), nullable=False)
    responder_type = _enum_column(ResponderType, nullable=False, index=True)
    phone = db.Column(db.String(32), nullable=False)
    email = db.Column(db.String(128))
    organization = db.Column(db.String(128))
    current_latitude = db.Column(db.Float)
    current_longitude = db.Column(db.Float)
    last_location_update = db.Column(db.DateTime)
    is_available = db.Column(db.Boolean, nullable=False, default=True, index=True)
    is_on_duty = db.Column(db.Boolean, nullable=False, default=True)
    assigned_incident_id = db.Column(db.Integer, db.ForeignKey("incidents.id"))
    total_responses = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, default=_utcnow)
    updated_at = db.Column(db.DateTime, default=_utcnow, onupdate=_utcnow)

    @property
    def has_location(self):
        return self.current_latitude is not None and self.current_longitude is not None

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "type": self.responder_type.value,
            "phone": self.phone,
            "email": self.email,
            "organization": self.organization,
            "current_latitude": self.current_latitude,
            "current_longitude": self.current_longitude,
            "last_location_update": _iso(self.last_location_update),
            "is_available": self.is_available,
            "is_on_duty": self.is_on_duty,
            "assigned_incident_id": self.assigned_incident_id,
            "total_responses": self.total_responses,
        }


class IncidentResponse(db.Model):
    """One responder dispatched to one incident."""

    __tablename__ = "incident_responses"

    id = db.Column(db.Integer, primary_key=True)
    incident_id = db.Column(db.Integer, db.ForeignKey("incidents.id"), nullable=False, index=True)
    responder_id = db.Column(db.Integer, db.ForeignKey("responders.id"), nullable=False, index=True)
    dispatched_at = db.Column(db.DateTime, default=_utcnow, nullable=False)
    completed_at = db.Column(db.DateTime)
    distance_km = db.Column(db.Float)
    notes = db.Column(db.Text)

    responder = db.relationship("Responder")

    def to_dict(self):
        return {
            "id": self.id,
            "incident_id": self.incident_id,
            "responder_id": self.responder_id,
            "dispatched_at": _iso(self.dispatched_at),
            "completed_at": _iso(self.completed_at),
            "distance_km": self.distance_km,
            "notes": self.notes,
        }
