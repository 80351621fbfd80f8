"""Flask application factory."""

import logging
from dataclasses import dataclass

from flask import Flask, abort, send_from_directory
from flask_cors import CORS
from flask_socketio import SocketIO

from pahal.config import CaptureSettings, Config
from pahal.database import db
from pahal.events import EventBus

logger = logging.getLogger(__name__)

socketio = SocketIO(cors_allowed_origins="*", async_mode="threading")


@dataclass
class Services:
    """Per-app service graph, stored in ``app.extensions["pahal"]``."""
    settings: object
    bus: object
    classifier: object
    geocoder: object
    media_store: object
    incidents: object
    router: object
    responders: object
    monitor: object
    hotspot_worker: object
    housekeeping: object


def build_services(app, config_class=Config, grabber=None, position_provider=None,
                   classifier=None, geocoder=None):
    """Wire the capture-triage pipeline. Collaborators may be injected for tests."""
    from pahal.scheduler import HousekeepingLoop, SmartCameraMonitor
    from pahal.services.camera_ingester import build_frame_grabber
    from pahal.services.classifier import AccidentClassifier
    from pahal.services.geolocation import Geocoder, Geolocator, build_position_provider
    from pahal.services.hotspots import HotspotWorker
    from pahal.services.incidents import IncidentLifecycleManager
    from pahal.services.media import MediaStore
    from pahal.services.responders import ResponderRegistry
    from pahal.services.triage import TriageRouter

    bus = EventBus()
    settings = CaptureSettings.from_config(config_class)
    classifier = classifier or AccidentClassifier(config_class)
    geocoder = geocoder or Geocoder(config_class)
    media_store = MediaStore.from_config(config_class)

    incidents = IncidentLifecycleManager(
        bus=bus,
        media_store=media_store,
        geocoder=geocoder,
        classifier=classifier,
        config=config_class,
    )
    router = TriageRouter(settings, incidents, media_store=media_store, bus=bus)
    monitor = SmartCameraMonitor(
        app,
        grabber=grabber or build_frame_grabber(config_class),
        geolocator=Geolocator(position_provider or build_position_provider(config_class), geocoder),
        classifier=classifier,
        router=router,
        settings=settings,
        bus=bus,
        warmup_seconds=config_class.CAPTURE_WARMUP_SECONDS,
    )

    return Services(
        settings=settings,
        bus=bus,
        classifier=classifier,
        geocoder=geocoder,
        media_store=media_store,
        incidents=incidents,
        router=router,
        responders=ResponderRegistry(incidents, bus=bus),
        monitor=monitor,
        hotspot_worker=HotspotWorker(app, bus),
        housekeeping=HousekeepingLoop(
            app, incidents, router, socketio, interval_seconds=config_class.STATS_BROADCAST_SECONDS
        ),
    )


def create_app(config_class=Config, **collaborators):
    app = Flask(__name__)
    app.config.from_object(config_class)

    # Extensions
    db.init_app(app)
    CORS(app)
    socketio.init_app(app)

    # Create tables
    with app.app_context():
        from pahal import models  # noqa: F401

        db.create_all()

    services = build_services(app, config_class, **collaborators)
    app.extensions["pahal"] = services

    # Register blueprints
    from pahal.routes.api import api_bp

    app.register_blueprint(api_bp, url_prefix="/api")

    # Register websocket handlers
    from pahal.routes.websocket import forward_bus_events, register_socket_events

    register_socket_events(socketio)
    forward_bus_events(socketio, services.bus)

    # Serve stored media
    @app.route(f"{config_class.MEDIA_URL_PREFIX}/<path:filename>")
    def media(filename):
        if services.media_store.path_for(f"{config_class.MEDIA_URL_PREFIX}/{filename}") is None:
            abort(404)
        return send_from_directory(services.media_store.root, filename)

    @app.route("/health")
    def health():
        return {"status": "ok", "classifier_configured": services.classifier.is_configured}

    if config_class.START_BACKGROUND_WORKERS:
        services.hotspot_worker.start()
        services.housekeeping.start()
        if config_class.CAMERA_AUTOSTART:
            try:
                services.monitor.start()
            except RuntimeError as e:
                logger.error(f"Smart camera autostart failed: {e}")

    return app
