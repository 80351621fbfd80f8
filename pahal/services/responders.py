"""Responder registry.

Keeps the roster of emergency units, their last known positions, and
which incident each one is currently assigned to. An assignment writes an
IncidentResponse row and takes the unit out of the available pool until
it is released.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from pahal import events
from pahal.database import db
from pahal.errors import InvalidTransition, NotFound, PersistenceError
from pahal.models import IncidentResponse, Responder, ResponderType
from pahal.services.geolocation import haversine_m
from pahal.services.incidents import parse_coordinate, parse_enum

logger = logging.getLogger(__name__)

DEFAULT_NEARBY_RADIUS_KM = 10.0


class ResponderRegistry:
    """Roster queries, position updates and incident assignment."""

    def __init__(self, incidents, bus=None):
        self.incidents = incidents
        self.bus = bus

    # ---------- Queries ----------

    def get(self, responder_id: int) -> Responder:
        responder = db.session.get(Responder, responder_id)
        if responder is None:
            raise NotFound(f"Responder {responder_id} not found")
        return responder

    def list(self, responder_type=None, available: Optional[bool] = None):
        query = Responder.query
        if responder_type:
            query = query.filter(
                Responder.responder_type == parse_enum(ResponderType, responder_type, "type")
            )
        if available is not None:
            query = query.filter(Responder.is_available.is_(bool(available)))
        return query.order_by(Responder.name).all()

    def nearby(self, latitude, longitude, radius_km: float = DEFAULT_NEARBY_RADIUS_KM,
               responder_type=None) -> list:
        """Available on-duty units within ``radius_km``, nearest first.

        Returns ``(responder, distance_km)`` pairs. Units that never reported
        a position are left out.
        """
        latitude = parse_coordinate(latitude, "latitude", 90)
        longitude = parse_coordinate(longitude, "longitude", 180)
        radius_km = float(radius_km)
        if not radius_km > 0:
            raise ValueError(f"radius_km must be positive (got {radius_km})")

        found = []
        for responder in self.list(responder_type, available=True):
            if not responder.is_on_duty or not responder.has_location:
                continue
            distance_km = haversine_m(
                latitude, longitude, responder.current_latitude, responder.current_longitude
            ) / 1000.0
            if distance_km <= radius_km:
                found.append((responder, round(distance_km, 3)))

        found.sort(key=lambda pair: pair[1])
        return found

    def responses_for(self, incident_id: int):
        self.incidents.get(incident_id)
        return (
            IncidentResponse.query
            .filter(IncidentResponse.incident_id == incident_id)
            .order_by(IncidentResponse.dispatched_at, IncidentResponse.id)
            .all()
        )

    # ---------- Updates ----------

    def register(self, fields: dict) -> Responder:
        name = (fields.get("name") or "").strip()
        phone = (fields.get("phone") or "").strip()
        if not name or not phone:
            raise ValueError("name and phone are required")

        responder = Responder(
            name=name[:128],
            responder_type=parse_enum(ResponderType, fields.get("type"), "type"),
            phone=phone[:32],
            email=fields.get("email"),
            organization=fields.get("organization"),
            is_available=True,
            is_on_duty=True,
        )
        if fields.get("latitude") is not None or fields.get("longitude") is not None:
            responder.current_latitude = parse_coordinate(fields.get("latitude"), "latitude", 90)
            responder.current_longitude = parse_coordinate(fields.get("longitude"), "longitude", 180)
            responder.last_location_update = datetime.now(timezone.utc)

        try:
            db.session.add(responder)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Failed to register responder: {e}")
            raise PersistenceError("Responder could not be saved") from e

        logger.info(f"Responder {responder.id} registered: {responder.name} ({responder.responder_type.value})")
        return responder

    def update_location(self, responder_id: int, latitude, longitude) -> Responder:
        latitude = parse_coordinate(latitude, "latitude", 90)
        longitude = parse_coordinate(longitude, "longitude", 180)
        responder = self.get(responder_id)

        responder.current_latitude = latitude
        responder.current_longitude = longitude
        responder.last_location_update = datetime.now(timezone.utc)
        self._commit(f"update location of responder {responder_id}")

        self._publish(events.RESPONDER_UPDATED, responder)
        return responder

    def assign(self, responder_id: int, incident_id: int, notes: Optional[str] = None) -> IncidentResponse:
        """Dispatch an available unit to an open incident."""
        responder = self.get(responder_id)
        incident = self.incidents.get(incident_id)

        if incident.status.is_terminal:
            raise InvalidTransition(
                incident.status.value, "assigned",
                f"Incident {incident_id} is {incident.status.value}",
            )
        if not responder.is_available:
            raise InvalidTransition(
                "assigned", "assigned",
                f"Responder {responder_id} is already assigned to incident {responder.assigned_incident_id}",
            )
        if not responder.is_on_duty:
            raise InvalidTransition("off_duty", "assigned", f"Responder {responder_id} is off duty")

        distance_km = None
        if responder.has_location:
            distance_km = round(haversine_m(
                responder.current_latitude, responder.current_longitude,
                incident.latitude, incident.longitude,
            ) / 1000.0, 3)

        response = IncidentResponse(
            incident_id=incident.id,
            responder_id=responder.id,
            dispatched_at=datetime.now(timezone.utc),
            distance_km=distance_km,
            notes=notes,
        )
        responder.is_available = False
        responder.assigned_incident_id = incident.id
        responder.total_responses = Responder.total_responses + 1
        db.session.add(response)
        self._commit(f"assign responder {responder_id} to incident {incident_id}")

        logger.info(f"Responder {responder_id} assigned to incident {incident_id}")
        self._publish(events.RESPONDER_UPDATED, responder)
        return response

    def release(self, responder_id: int) -> Responder:
        """Return a unit to the available pool and close its open response."""
        responder = self.get(responder_id)
        if responder.is_available:
            return responder

        open_response = (
            IncidentResponse.query
            .filter(
                IncidentResponse.responder_id == responder.id,
                IncidentResponse.completed_at.is_(None),
            )
            .order_by(IncidentResponse.dispatched_at.desc())
            .first()
        )
        if open_response is not None:
            open_response.completed_at = datetime.now(timezone.utc)
        responder.is_available = True
        responder.assigned_incident_id = None
        self._commit(f"release responder {responder_id}")

        logger.info(f"Responder {responder_id} released")
        self._publish(events.RESPONDER_UPDATED, responder)
        return responder

    # ---------- Internals ----------

    def _commit(self, action: str):
        try:
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Failed to {action}: {e}")
            raise PersistenceError(f"Failed to {action}") from e

    def _publish(self, event: str, responder: Responder):
        if self.bus is not None:
            self.bus.publish(event, responder.to_dict())
