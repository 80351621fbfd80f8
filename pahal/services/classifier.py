"""Accident image classification.

Sends a captured or uploaded photo to a vision-capable chat completion
endpoint and normalizes the reply into a ClassificationResult.

Two modes:
A) Live: an API key is configured, the image is posted as a data URL and
   the model answers with a JSON object.
B) Degraded: no key, or the call failed (timeout, HTTP error, unparseable
   reply). A synthetic result is produced locally so that routing keeps
   working; it is flagged ``degraded=True``.
"""

import base64
import json
import logging
import math
import random
import re
from dataclasses import asdict, dataclass, field
from io import BytesIO

import requests
from PIL import Image, UnidentifiedImageError

from pahal.models import AccidentType, SeverityLevel

logger = logging.getLogger(__name__)

IMAGE_SYSTEM_PROMPT = """You are an AI assistant specialized in analyzing road accident images for emergency response systems.
Analyze the provided image and extract the following information in JSON format:
{
  "accidentType": "vehicle_collision | pedestrian_hit | motorcycle_accident | truck_accident | multi_vehicle | hit_and_run | bus_accident | auto_rickshaw | bicycle_accident | other",
  "severity": "low | medium | high | critical",
  "title": "Brief title describing the accident (max 50 chars)",
  "description": "Detailed description of what you observe (2-3 sentences)",
  "vehiclesInvolved": number,
  "estimatedCasualties": number (0 if unclear),
  "recommendations": ["array of 2-3 immediate action recommendations"],
  "confidence": number between 0 and 1 that the image shows a genuine road accident
}

Severity guidelines:
- low: Minor damage, no visible injuries
- medium: Moderate damage, possible minor injuries
- high: Significant damage, likely injuries
- critical: Severe damage, life-threatening situation

Only respond with valid JSON, no additional text."""

DESCRIPTION_SYSTEM_PROMPT = """You are an AI assistant for an emergency response system. Based on the accident description provided, suggest appropriate values in JSON format:
{
  "accidentType": "vehicle_collision | pedestrian_hit | motorcycle_accident | truck_accident | multi_vehicle | hit_and_run | bus_accident | auto_rickshaw | bicycle_accident | other",
  "severity": "low | medium | high | critical",
  "recommendations": ["array of 2-3 immediate action recommendations"]
}
Only respond with valid JSON."""

MAX_TITLE_LENGTH = 50

_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


class MalformedResponse(ValueError):
    """The classifier answered, but not with a usable analysis."""


# ---------- Data Structures ----------

@dataclass
class ClassificationResult:
    """Normalized analysis of one image."""
    category: AccidentType = AccidentType.OTHER
    severity: SeverityLevel = SeverityLevel.MEDIUM
    confidence: float = 0.0
    title: str = ""
    description: str = ""
    vehicles_involved: int = 0
    estimated_casualties: int = 0
    recommendations: list = field(default_factory=list)
    degraded: bool = False

    def to_dict(self):
        data = asdict(self)
        data["category"] = self.category.value
        data["severity"] = self.severity.value
        return data


# ---------- Normalization ----------

def _coerce_enum(enum_cls, value, default):
    if isinstance(value, str):
        key = value.strip().lower().replace(" ", "_").replace("-", "_")
        try:
            return enum_cls(key)
        except ValueError:
            pass
    return default


def _coerce_count(value) -> int:
    try:
        return max(int(value), 0)
    except (TypeError, ValueError):
        return 0


def _strip_fences(content: str) -> str:
    content = content.strip()
    match = _FENCE_RE.match(content)
    return match.group(1) if match else content


def normalize_analysis(raw: dict) -> ClassificationResult:
    """Map a raw model reply onto a ClassificationResult.

    Raises MalformedResponse when no numeric confidence is present; every
    other field has a safe default.
    """
    if not isinstance(raw, dict):
        raise MalformedResponse(f"Expected a JSON object, got {type(raw).__name__}")

    confidence = raw.get("confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        raise MalformedResponse(f"Missing or non-numeric confidence: {confidence!r}")
    if not math.isfinite(confidence):
        raise MalformedResponse(f"Non-finite confidence: {confidence!r}")
    confidence = min(max(float(confidence), 0.0), 1.0)

    category = _coerce_enum(AccidentType, raw.get("accidentType"), AccidentType.OTHER)
    severity = _coerce_enum(SeverityLevel, raw.get("severity"), SeverityLevel.MEDIUM)

    title = str(raw.get("title") or f"{category.label} detected").strip()
    recommendations = raw.get("recommendations") or []
    if isinstance(recommendations, str):
        recommendations = [recommendations]
    elif not isinstance(recommendations, list):
        recommendations = []

    return ClassificationResult(
        category=category,
        severity=severity,
        confidence=round(confidence, 3),
        title=title[:MAX_TITLE_LENGTH],
        description=str(raw.get("description") or "").strip(),
        vehicles_involved=_coerce_count(raw.get("vehiclesInvolved")),
        estimated_casualties=_coerce_count(raw.get("estimatedCasualties")),
        recommendations=[str(r) for r in recommendations if r],
        degraded=False,
    )


def image_mime_type(image: bytes) -> str:
    """Sniff the image format; defaults to JPEG for unrecognized data."""
    try:
        with Image.open(BytesIO(image)) as img:
            fmt = (img.format or "JPEG").lower()
    except (UnidentifiedImageError, OSError):
        return "image/jpeg"
    return "image/jpeg" if fmt == "jpeg" else f"image/{fmt}"


# ---------- Classifier ----------

class AccidentClassifier:
    """Client for the external vision classifier, with a local fallback."""

    def __init__(self, config=None, session=None):
        if config is None:
            from pahal.config import Config
            config = Config

        self.api_url = config.CLASSIFIER_API_URL
        self.api_key = config.CLASSIFIER_API_KEY
        self.model = config.CLASSIFIER_MODEL
        self.text_model = config.CLASSIFIER_TEXT_MODEL
        self.timeout = config.CLASSIFIER_TIMEOUT_SECONDS
        self.session = session or requests.Session()

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def analyze_image(self, image: bytes) -> ClassificationResult:
        """Classify one image. Never raises for service failures."""
        if not image:
            raise ValueError("analyze_image() requires non-empty image bytes")

        if not self.is_configured:
            logger.warning("Classifier API key not configured, using simulated analysis")
            return simulate_classification()

        mime_type = image_mime_type(image)
        encoded = base64.b64encode(image).decode("ascii")
        messages = [
            {"role": "system", "content": IMAGE_SYSTEM_PROMPT},
            {
                "role": "user",
                "content": [
                    {
                        "type": "text",
                        "text": "Analyze this accident image and provide the structured JSON response as specified.",
                    },
                    {
                        "type": "image_url",
                        "image_url": {"url": f"data:{mime_type};base64,{encoded}"},
                    },
                ],
            },
        ]

        try:
            content = self._complete(self.model, messages, max_tokens=1000, temperature=0.2)
            return normalize_analysis(json.loads(_strip_fences(content)))
        except requests.Timeout:
            logger.warning(f"Classifier timed out after {self.timeout}s, using simulated analysis")
        except requests.RequestException as e:
            logger.warning(f"Classifier request failed: {e}")
        except (ValueError, KeyError, IndexError, TypeError) as e:
            logger.warning(f"Unusable classifier response: {e}")

        return simulate_classification()

    def analyze_description(self, description: str) -> dict:
        """Suggest accident type, severity and recommendations for free text.

        Returns an empty dict when the service is unconfigured or fails.
        """
        if not description or not self.is_configured:
            return {}

        messages = [
            {"role": "system", "content": DESCRIPTION_SYSTEM_PROMPT},
            {"role": "user", "content": description},
        ]
        try:
            content = self._complete(self.text_model, messages, max_tokens=500, temperature=0.3)
            raw = json.loads(_strip_fences(content))
        except (requests.RequestException, ValueError, KeyError, IndexError, TypeError) as e:
            logger.warning(f"Description analysis failed: {e}")
            return {}

        if not isinstance(raw, dict):
            return {}

        suggestion = {}
        if raw.get("accidentType"):
            suggestion["accident_type"] = _coerce_enum(
                AccidentType, raw["accidentType"], AccidentType.OTHER
            ).value
        if raw.get("severity"):
            suggestion["severity"] = _coerce_enum(
                SeverityLevel, raw["severity"], SeverityLevel.MEDIUM
            ).value
        if isinstance(raw.get("recommendations"), list):
            suggestion["recommendations"] = [str(r) for r in raw["recommendations"] if r]
        return suggestion

    def _complete(self, model: str, messages: list, max_tokens: int, temperature: float) -> str:
        response = self.session.post(
            self.api_url,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
            json={
                "model": model,
                "messages": messages,
                "max_tokens": max_tokens,
                "temperature": temperature,
            },
            timeout=self.timeout,
        )
        response.raise_for_status()

        content = response.json()["choices"][0]["message"]["content"]
        if not content:
            raise MalformedResponse("No content in classifier response")
        return content


def simulate_classification() -> ClassificationResult:
    """
    Generate a stand-in analysis when the classifier is unavailable.
    Confidence stays in a plausible band so downstream routing still runs.
    """
    category = random.choice([
        AccidentType.VEHICLE_COLLISION,
        AccidentType.MOTORCYCLE_ACCIDENT,
        AccidentType.MULTI_VEHICLE,
        AccidentType.TRUCK_ACCIDENT,
    ])

    return ClassificationResult(
        category=category,
        severity=random.choice([SeverityLevel.MEDIUM, SeverityLevel.HIGH, SeverityLevel.CRITICAL]),
        confidence=round(random.uniform(0.75, 0.95), 3),
        title="Vehicle collision detected on roadway",
        description=(
            "AI analysis detected a road accident involving vehicles. Emergency response "
            "may be required based on the apparent severity of the incident."
        ),
        vehicles_involved=random.randint(1, 3),
        estimated_casualties=random.randint(0, 1),
        recommendations=[
            "Dispatch emergency medical services",
            "Alert traffic control to manage congestion",
            "Notify local law enforcement",
        ],
        degraded=True,
    )
