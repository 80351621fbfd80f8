"""Application configuration."""

import math
import os
import threading
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


_TRUE_STRINGS = ("1", "true", "yes", "on")


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in _TRUE_STRINGS


def _as_bool(value) -> bool:
    """Booleans from JSON or form input; strings are read like env flags."""
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    return bool(value)


def _env_float(name: str):
    value = os.getenv(name)
    return float(value) if value not in (None, "") else None


class Config:
    SECRET_KEY = os.getenv("FLASK_SECRET_KEY", "dev-secret-key")
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL", "sqlite:///pahal.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Background threads (smart camera autostart, hotspot worker, housekeeping)
    START_BACKGROUND_WORKERS = _env_bool("START_BACKGROUND_WORKERS", "true")

    # Classifier (OpenAI-compatible chat completions endpoint)
    CLASSIFIER_API_URL = os.getenv(
        "CLASSIFIER_API_URL", "https://api.perplexity.ai/chat/completions"
    )
    CLASSIFIER_API_KEY = os.getenv("PERPLEXITY_API_KEY", "")
    CLASSIFIER_MODEL = os.getenv("CLASSIFIER_MODEL", "sonar-pro")
    CLASSIFIER_TEXT_MODEL = os.getenv("CLASSIFIER_TEXT_MODEL", "sonar")
    CLASSIFIER_TIMEOUT_SECONDS = float(os.getenv("CLASSIFIER_TIMEOUT_SECONDS", "20"))

    # Geolocation
    GEOCODER_URL = os.getenv(
        "GEOCODER_URL", "https://nominatim.openstreetmap.org/reverse"
    )
    GEOCODER_USER_AGENT = os.getenv("GEOCODER_USER_AGENT", "pahal-incident-service/1.0")
    GEOLOCATION_TIMEOUT_SECONDS = float(os.getenv("GEOLOCATION_TIMEOUT_SECONDS", "10"))
    # Either a fixed mount point for the camera, or an IP geolocation endpoint
    CAMERA_LATITUDE = _env_float("CAMERA_LATITUDE")
    CAMERA_LONGITUDE = _env_float("CAMERA_LONGITUDE")
    POSITION_URL = os.getenv("POSITION_URL", "")

    # Smart camera
    CAMERA_DEVICE_INDEX = int(os.getenv("CAMERA_DEVICE_INDEX", "0"))
    CAMERA_SNAPSHOT_URL = os.getenv("CAMERA_SNAPSHOT_URL", "")
    CAMERA_AUTOSTART = _env_bool("CAMERA_AUTOSTART", "false")
    CAPTURE_INTERVAL_SECONDS = float(os.getenv("CAPTURE_INTERVAL_SECONDS", "15"))
    CAPTURE_WARMUP_SECONDS = float(os.getenv("CAPTURE_WARMUP_SECONDS", "1"))
    AUTO_SUBMIT_THRESHOLD = float(os.getenv("AUTO_SUBMIT_THRESHOLD", "0.80"))
    MANUAL_REVIEW_THRESHOLD = float(os.getenv("MANUAL_REVIEW_THRESHOLD", "0.50"))
    LOCATION_TRACKING = _env_bool("LOCATION_TRACKING", "true")
    MAX_FRAME_WIDTH = int(os.getenv("MAX_FRAME_WIDTH", "1280"))
    JPEG_QUALITY = int(os.getenv("JPEG_QUALITY", "85"))

    # Media storage
    MEDIA_ROOT = os.getenv(
        "MEDIA_ROOT",
        os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "media"),
    )
    MEDIA_URL_PREFIX = os.getenv("MEDIA_URL_PREFIX", "/media")

    # Duplicate report consolidation
    DEDUP_ENABLED = _env_bool("DEDUP_ENABLED", "true")
    DEDUP_WINDOW_MINUTES = int(os.getenv("DEDUP_WINDOW_MINUTES", "30"))
    DEDUP_RADIUS_METERS = float(os.getenv("DEDUP_RADIUS_METERS", "250"))

    # Housekeeping
    STATS_BROADCAST_SECONDS = int(os.getenv("STATS_BROADCAST_SECONDS", "60"))


@dataclass(frozen=True)
class SettingsSnapshot:
    """Immutable view of the capture settings, taken once per capture."""
    capture_interval_seconds: float
    auto_submit_threshold: float
    manual_review_threshold: float
    location_tracking: bool

    def to_dict(self):
        return {
            "capture_interval_seconds": self.capture_interval_seconds,
            "auto_submit_threshold": self.auto_submit_threshold,
            "manual_review_threshold": self.manual_review_threshold,
            "location_tracking": self.location_tracking,
        }


def validate_thresholds(manual_review: float, auto_submit: float):
    if not 0.0 <= manual_review <= auto_submit <= 1.0:
        raise ValueError(
            "Thresholds must satisfy 0 <= manual_review_threshold "
            f"<= auto_submit_threshold <= 1 (got {manual_review}, {auto_submit})"
        )


class CaptureSettings:
    """Operator-tunable smart camera settings shared by the monitor and router.

    Updates are atomic with respect to readers: a capture reads one
    snapshot and routes against it, so a change only affects later captures.
    """

    def __init__(
        self,
        capture_interval_seconds: float = 15.0,
        auto_submit_threshold: float = 0.80,
        manual_review_threshold: float = 0.50,
        location_tracking: bool = True,
    ):
        self._lock = threading.Lock()
        self._snapshot = self._build(
            capture_interval_seconds,
            auto_submit_threshold,
            manual_review_threshold,
            location_tracking,
        )

    @classmethod
    def from_config(cls, config=None):
        if config is None:
            config = Config
        return cls(
            capture_interval_seconds=config.CAPTURE_INTERVAL_SECONDS,
            auto_submit_threshold=config.AUTO_SUBMIT_THRESHOLD,
            manual_review_threshold=config.MANUAL_REVIEW_THRESHOLD,
            location_tracking=config.LOCATION_TRACKING,
        )

    @staticmethod
    def _build(interval, auto_submit, manual_review, location_tracking) -> SettingsSnapshot:
        interval = float(interval)
        auto_submit = float(auto_submit)
        manual_review = float(manual_review)
        if not math.isfinite(interval) or interval <= 0:
            raise ValueError(f"capture_interval_seconds must be positive (got {interval})")
        validate_thresholds(manual_review, auto_submit)
        return SettingsSnapshot(
            capture_interval_seconds=interval,
            auto_submit_threshold=auto_submit,
            manual_review_threshold=manual_review,
            location_tracking=_as_bool(location_tracking),
        )

    def snapshot(self) -> SettingsSnapshot:
        with self._lock:
            return self._snapshot

    def update(self, **changes) -> SettingsSnapshot:
        """Apply a partial update; rejects unknown keys and invalid thresholds."""
        unknown = set(changes) - set(SettingsSnapshot.__dataclass_fields__)
        if unknown:
            raise ValueError(f"Unknown settings: {', '.join(sorted(unknown))}")

        with self._lock:
            merged = {**self._snapshot.to_dict(), **changes}
            self._snapshot = self._build(
                merged["capture_interval_seconds"],
                merged["auto_submit_threshold"],
                merged["manual_review_threshold"],
                merged["location_tracking"],
            )
            return self._snapshot
