"""WebSocket event handlers for real-time updates."""

import logging

from flask_socketio import emit

from pahal import events

logger = logging.getLogger(__name__)

# Bus event -> Socket.IO event
BUS_FORWARDS = {
    events.INCIDENT_CREATED: "new_incident",
    events.INCIDENT_CONSOLIDATED: "incident_update",
    events.INCIDENT_UPDATED: "incident_update",
    events.CAPTURE_COMPLETED: "capture_completed",
    events.CAPTURE_FAILED: "capture_failed",
    events.CAMERA_STATUS: "camera_status",
    events.RESPONDER_UPDATED: "responder_update",
}


def register_socket_events(socketio):
    """Register all Socket.IO event handlers."""

    @socketio.on("connect")
    def handle_connect():
        logger.debug("Socket client connected")
        emit("connection_ack", {"status": "connected", "message": "Pahal real-time feed active"})

    @socketio.on("disconnect")
    def handle_disconnect():
        logger.debug("Socket client disconnected")

    @socketio.on("subscribe_incidents")
    def handle_subscribe_incidents(data=None):
        emit("subscribed", {"channel": "incidents"})

    @socketio.on("subscribe_camera")
    def handle_subscribe_camera(data=None):
        emit("subscribed", {"channel": "camera"})

    @socketio.on("subscribe_heatmap")
    def handle_subscribe_heatmap(data=None):
        emit("subscribed", {"channel": "heatmap"})


def forward_bus_events(socketio, bus):
    """Relay event bus traffic to all connected clients."""
    for bus_event, socket_event in BUS_FORWARDS.items():
        bus.subscribe(bus_event, _forwarder(socketio, socket_event))


def _forwarder(socketio, socket_event):
    def forward(payload):
        socketio.emit(socket_event, payload)
    return forward


def broadcast_heatmap_update(socketio, heatmap_data):
    """Broadcast updated heat map data."""
    socketio.emit("heatmap_update", heatmap_data)


def broadcast_stats_update(socketio, stats_data):
    """Broadcast updated dashboard stats."""
    socketio.emit("stats_update", stats_data)
