"""REST API endpoints for Pahal."""

import logging
from datetime import datetime, timezone

from flask import Blueprint, current_app, jsonify, request

from pahal.errors import InvalidTransition, NotFound, PersistenceError
from pahal.services.hotspots import compute_heatmap_data, list_hotspots

logger = logging.getLogger(__name__)

api_bp = Blueprint("api", __name__)


def _services():
    return current_app.extensions["pahal"]


def _int_arg(name, default, maximum=None):
    try:
        value = int(request.args.get(name, default))
    except (TypeError, ValueError):
        raise ValueError(f"Query parameter '{name}' must be an integer") from None
    return min(value, maximum) if maximum else value


def _json_object() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError("Request body must be a JSON object")
    return data


def _truthy(value) -> bool:
    return str(value).strip().lower() in ("1", "true", "yes", "on")


# ---------- ERRORS ----------

@api_bp.errorhandler(ValueError)
def handle_bad_request(error):
    return jsonify({"error": str(error)}), 400


@api_bp.errorhandler(NotFound)
def handle_not_found(error):
    return jsonify({"error": str(error)}), 404


@api_bp.errorhandler(InvalidTransition)
def handle_invalid_transition(error):
    return jsonify({
        "error": str(error),
        "current": error.current,
        "requested": error.requested,
    }), 409


@api_bp.errorhandler(PersistenceError)
def handle_persistence_error(error):
    return jsonify({"error": str(error), "retry": True}), 503


# ---------- INCIDENTS ----------

@api_bp.route("/incidents")
def list_incidents():
    """Query incidents with filters, newest first."""
    hours = request.args.get("hours")
    incidents = _services().incidents.list(
        status=request.args.get("status"),
        severity=request.args.get("severity"),
        hours=int(hours) if hours else None,
        limit=_int_arg("limit", 200, maximum=1000),
    )
    return jsonify({
        "incidents": [i.to_dict() for i in incidents],
        "total": len(incidents),
    })


@api_bp.route("/incidents", methods=["POST"])
def create_incident():
    """Citizen report. Accepts JSON, or multipart form data with ``photos`` files."""
    if request.files or request.form:
        fields = request.form.to_dict()
        photos = [f.read() for f in request.files.getlist("photos")]
    else:
        fields = request.get_json(silent=True) or {}
        photos = []

    analyze = _truthy(fields.pop("analyze", False))
    result = _services().incidents.submit_report(fields, photos, analyze=analyze)

    status_code = 200 if result.consolidated else 201
    return jsonify(result.to_dict()), status_code


@api_bp.route("/incidents/stats")
def incident_stats():
    return jsonify(_services().incidents.statistics())


@api_bp.route("/incidents/<int:incident_id>")
def get_incident(incident_id):
    return jsonify(_services().incidents.get(incident_id).to_dict())


@api_bp.route("/incidents/<int:incident_id>", methods=["PATCH"])
def update_incident(incident_id):
    """Operator edits: severity and/or resolution notes."""
    data = request.get_json(silent=True) or {}
    manager = _services().incidents
    unknown = set(data) - {"severity", "resolution_notes"}
    if unknown:
        raise ValueError(f"Fields not editable here: {', '.join(sorted(unknown))}")

    incident = manager.get(incident_id)
    if "severity" in data:
        incident = manager.reassign_severity(incident_id, data["severity"])
    if "resolution_notes" in data:
        incident = manager.update_notes(incident_id, data["resolution_notes"])
    return jsonify(incident.to_dict())


@api_bp.route("/incidents/<int:incident_id>/status", methods=["POST"])
def transition_incident(incident_id):
    """Move an incident to an explicit status (must be the next one)."""
    data = request.get_json(silent=True) or {}
    if not data.get("status"):
        raise ValueError("status is required")
    incident = _services().incidents.transition(incident_id, data["status"], data.get("notes"))
    return jsonify(incident.to_dict())


@api_bp.route("/incidents/<int:incident_id>/advance", methods=["POST"])
def advance_incident(incident_id):
    data = request.get_json(silent=True) or {}
    incident = _services().incidents.advance(incident_id, data.get("notes"))
    return jsonify(incident.to_dict())


@api_bp.route("/incidents/<int:incident_id>/false-alarm", methods=["POST"])
def false_alarm(incident_id):
    data = request.get_json(silent=True) or {}
    incident = _services().incidents.mark_false_alarm(incident_id, data.get("notes"))
    return jsonify(incident.to_dict())


@api_bp.route("/incidents/suggest", methods=["POST"])
def suggest_from_description():
    """AI suggestion of type/severity from a free-text description."""
    data = request.get_json(silent=True) or {}
    return jsonify(_services().classifier.analyze_description(data.get("description", "")))


# ---------- CAPTURES ----------

@api_bp.route("/captures")
def list_captures():
    captures = _services().router.recent(
        limit=_int_arg("limit", 100, maximum=1000),
        disposition=request.args.get("disposition"),
    )
    return jsonify({
        "captures": [c.to_dict() for c in captures],
        "total": len(captures),
    })


@api_bp.route("/captures", methods=["DELETE"])
def clear_captures():
    removed = _services().router.clear()
    return jsonify({"removed": removed})


@api_bp.route("/captures/pending")
def pending_captures():
    captures = _services().router.pending_review()
    return jsonify({
        "captures": [c.to_dict() for c in captures],
        "total": len(captures),
    })


@api_bp.route("/captures/stats")
def capture_stats():
    stats = _services().router.statistics()
    stats["is_active"] = _services().monitor.is_active
    return jsonify(stats)


@api_bp.route("/captures/<capture_id>/approve", methods=["POST"])
def approve_capture(capture_id):
    data = _json_object()
    capture = _services().router.approve(capture_id, data.get("notes"), data.get("reviewer"))
    return jsonify(capture.to_dict())


@api_bp.route("/captures/<capture_id>/reject", methods=["POST"])
def reject_capture(capture_id):
    """Reject a pending capture, optionally with reviewer notes."""
    data = _json_object()
    capture = _services().router.reject(capture_id, data.get("notes"), data.get("reviewer"))
    return jsonify(capture.to_dict())


# ---------- SMART CAMERA ----------

@api_bp.route("/camera")
def camera_status():
    return jsonify(_services().monitor.status())


@api_bp.route("/camera/start", methods=["POST"])
def start_camera():
    monitor = _services().monitor
    try:
        monitor.start()
    except RuntimeError as e:
        logger.warning(f"Smart camera could not start: {e}")
        return jsonify({"error": str(e)}), 503
    return jsonify(monitor.status())


@api_bp.route("/camera/stop", methods=["POST"])
def stop_camera():
    monitor = _services().monitor
    monitor.stop()
    return jsonify(monitor.status())


@api_bp.route("/camera/capture", methods=["POST"])
def manual_capture():
    capture = _services().monitor.capture_now()
    if capture is None:
        return jsonify({"capture": None, "message": "Capture skipped or failed"}), 202
    return jsonify({"capture": capture.to_dict()})


@api_bp.route("/camera/config")
def get_camera_config():
    return jsonify(_services().settings.snapshot().to_dict())


@api_bp.route("/camera/config", methods=["PUT", "PATCH"])
def update_camera_config():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValueError("Settings body must be a JSON object")
    snapshot = _services().settings.update(**data)
    logger.info(f"Smart camera settings updated: {snapshot.to_dict()}")
    return jsonify(snapshot.to_dict())


# ---------- RESPONDERS ----------

@api_bp.route("/responders")
def list_responders():
    available = request.args.get("available")
    responders = _services().responders.list(
        responder_type=request.args.get("type"),
        available=_truthy(available) if available is not None else None,
    )
    return jsonify({
        "responders": [r.to_dict() for r in responders],
        "total": len(responders),
    })


@api_bp.route("/responders", methods=["POST"])
def register_responder():
    responder = _services().responders.register(_json_object())
    return jsonify(responder.to_dict()), 201


@api_bp.route("/responders/nearby")
def nearby_responders():
    """Available units around a point, nearest first."""
    try:
        radius_km = float(request.args.get("radius_km", 10))
    except ValueError:
        raise ValueError("Query parameter 'radius_km' must be a number") from None
    found = _services().responders.nearby(
        request.args.get("lat"),
        request.args.get("lng"),
        radius_km=radius_km,
        responder_type=request.args.get("type"),
    )
    return jsonify({
        "responders": [{**r.to_dict(), "distance_km": d} for r, d in found],
        "total": len(found),
    })


@api_bp.route("/responders/<int:responder_id>/location", methods=["PUT", "PATCH"])
def update_responder_location(responder_id):
    data = _json_object()
    responder = _services().responders.update_location(
        responder_id, data.get("latitude"), data.get("longitude")
    )
    return jsonify(responder.to_dict())


@api_bp.route("/responders/<int:responder_id>/assign", methods=["POST"])
def assign_responder(responder_id):
    data = _json_object()
    if data.get("incident_id") is None:
        raise ValueError("incident_id is required")
    try:
        incident_id = int(data["incident_id"])
    except (TypeError, ValueError):
        raise ValueError("incident_id must be an integer") from None
    response = _services().responders.assign(responder_id, incident_id, data.get("notes"))
    return jsonify(response.to_dict()), 201


@api_bp.route("/responders/<int:responder_id>/release", methods=["POST"])
def release_responder(responder_id):
    return jsonify(_services().responders.release(responder_id).to_dict())


@api_bp.route("/incidents/<int:incident_id>/responses")
def incident_responses(incident_id):
    responses = _services().responders.responses_for(incident_id)
    return jsonify({
        "responses": [r.to_dict() for r in responses],
        "total": len(responses),
    })


# ---------- HOTSPOTS ----------

@api_bp.route("/hotspots")
def get_hotspots():
    min_risk = request.args.get("min_risk")
    hotspots = list_hotspots(float(min_risk) if min_risk else None)
    return jsonify({
        "hotspots": [h.to_dict() for h in hotspots],
        "total": len(hotspots),
    })


@api_bp.route("/heatmap")
def get_heatmap():
    """Get heat map data: aggregated incident density."""
    hours = _int_arg("hours", 24)
    return jsonify({
        "heatmap": compute_heatmap_data(hours=hours),
        "hours": hours,
        "generated_at": datetime.now(timezone.utc).isoformat(),
    })
