"""
Shared fixtures.

Each test gets its own app backed by a throwaway SQLite file and media
directory, with the camera, position source, geocoder and classifier
replaced by in-process fakes.
"""

from io import BytesIO

import pytest
from PIL import Image

from pahal.app import create_app
from pahal.config import Config
from pahal.database import db
from pahal.models import AccidentType, SeverityLevel
from pahal.services.classifier import ClassificationResult
from pahal.services.geolocation import StaticPositionProvider, format_coordinates

# Inside the Kashmere Gate seed zone
DELHI_LAT = 28.6139
DELHI_LNG = 77.2090


def make_jpeg(color=(200, 30, 30), size=(64, 48)) -> bytes:
    buffer = BytesIO()
    Image.new("RGB", size, color).save(buffer, format="JPEG")
    return buffer.getvalue()


class FakeGrabber:
    def __init__(self, frame=None):
        self.frame = frame if frame is not None else make_jpeg()
        self.opened = 0
        self.released = 0

    def open(self):
        self.opened += 1

    def grab(self):
        return self.frame

    def release(self):
        self.released += 1


class FakeClassifier:
    def __init__(self, confidence=0.9, degraded=False):
        self.result = ClassificationResult(
            category=AccidentType.VEHICLE_COLLISION,
            severity=SeverityLevel.HIGH,
            confidence=confidence,
            title="Two cars collided",
            description="Two cars collided at the junction.",
            vehicles_involved=2,
            estimated_casualties=1,
            recommendations=["Dispatch ambulance"],
            degraded=degraded,
        )
        self.suggestion = {}
        self.calls = 0

    @property
    def is_configured(self):
        return False

    def analyze_image(self, image):
        self.calls += 1
        return self.result

    def analyze_description(self, description):
        return self.suggestion


class FakeGeocoder:
    def __init__(self, address="Kashmere Gate, Delhi"):
        self.address = address

    def reverse_geocode(self, lat, lng):
        return self.address

    def resolve_address(self, lat, lng):
        return self.address or format_coordinates(lat, lng)


class PahalTestConfig(Config):
    TESTING = True
    START_BACKGROUND_WORKERS = False
    CAMERA_AUTOSTART = False
    CLASSIFIER_API_KEY = ""
    CAPTURE_WARMUP_SECONDS = 0.0
    CAPTURE_INTERVAL_SECONDS = 15.0
    AUTO_SUBMIT_THRESHOLD = 0.80
    MANUAL_REVIEW_THRESHOLD = 0.50
    LOCATION_TRACKING = True
    DEDUP_ENABLED = True
    DEDUP_WINDOW_MINUTES = 30
    DEDUP_RADIUS_METERS = 250.0


@pytest.fixture
def config(tmp_path):
    """Per-test config class with its own database file and media root."""
    return type("PerTestConfig", (PahalTestConfig,), {
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'pahal-test.db'}",
        "MEDIA_ROOT": str(tmp_path / "media"),
    })


@pytest.fixture
def grabber():
    return FakeGrabber()


@pytest.fixture
def classifier():
    return FakeClassifier()


@pytest.fixture
def geocoder():
    return FakeGeocoder()


@pytest.fixture
def app(config, grabber, classifier, geocoder):
    app = create_app(
        config,
        grabber=grabber,
        position_provider=StaticPositionProvider(DELHI_LAT, DELHI_LNG),
        classifier=classifier,
        geocoder=geocoder,
    )
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def services(app):
    return app.extensions["pahal"]


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def published(services):
    """Every event published on the app's bus, in order."""
    seen = []
    original = services.bus.publish

    def record(event, payload=None):
        seen.append((event, payload))
        original(event, payload)

    services.bus.publish = record
    return seen


@pytest.fixture
def report_fields():
    return {
        "title": "Collision near the flyover",
        "description": "Car hit a scooter",
        "accident_type": "vehicle_collision",
        "severity": "high",
        "latitude": DELHI_LAT,
        "longitude": DELHI_LNG,
        "reporter_name": "Asha",
    }
