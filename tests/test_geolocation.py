"""
Position lookup and reverse geocoding tests.
"""

from unittest.mock import Mock

import pytest
import requests

from conftest import FakeGeocoder, PahalTestConfig
from pahal.services.geolocation import (
    Geocoder,
    Geolocator,
    HttpPositionProvider,
    NullPositionProvider,
    PositionUnavailable,
    StaticPositionProvider,
    build_position_provider,
    format_coordinates,
    haversine_m,
    is_valid_position,
)


def json_response(payload):
    response = Mock()
    response.raise_for_status.return_value = None
    response.json.return_value = payload
    return response


class TestHaversine:
    def test_zero_distance(self):
        assert haversine_m(28.6139, 77.2090, 28.6139, 77.2090) == 0.0

    def test_known_distance(self):
        # Kashmere Gate to ITO Junction, roughly 3.5 km
        distance = haversine_m(28.6139, 77.2090, 28.6289, 77.2408)
        assert 3300 < distance < 3700

    def test_symmetric(self):
        a = haversine_m(28.5494, 77.2513, 28.5672, 77.2100)
        b = haversine_m(28.5672, 77.2100, 28.5494, 77.2513)
        assert a == pytest.approx(b)


def test_format_coordinates():
    assert format_coordinates(28.6139, 77.209) == "28.613900, 77.209000"


class TestGeocoder:
    def test_reverse_geocode(self):
        session = Mock()
        session.get.return_value = json_response({"display_name": "ITO, New Delhi"})
        geocoder = Geocoder(PahalTestConfig, session=session)

        assert geocoder.reverse_geocode(28.6289, 77.2408) == "ITO, New Delhi"
        kwargs = session.get.call_args.kwargs
        assert kwargs["params"] == {"lat": 28.6289, "lon": 77.2408, "format": "json"}
        assert kwargs["headers"]["User-Agent"] == PahalTestConfig.GEOCODER_USER_AGENT

    def test_failure_falls_back_to_coordinates(self):
        session = Mock()
        session.get.side_effect = requests.ConnectionError("offline")
        geocoder = Geocoder(PahalTestConfig, session=session)

        assert geocoder.reverse_geocode(28.6, 77.2) is None
        assert geocoder.resolve_address(28.6, 77.2) == "28.600000, 77.200000"


class TestPositionProviders:
    def test_http_provider_accepts_lon_or_lng(self):
        session = Mock()
        session.get.return_value = json_response({"lat": "28.5", "lon": "77.1"})
        assert HttpPositionProvider("http://geo", session=session).get_current_position() == (28.5, 77.1)

        session.get.return_value = json_response({"latitude": 28.5, "longitude": 77.1})
        assert HttpPositionProvider("http://geo", session=session).get_current_position() == (28.5, 77.1)

    @pytest.mark.parametrize("side_effect, payload", [
        (requests.Timeout("slow"), None),
        (None, {"status": "fail"}),
    ])
    def test_http_provider_failures(self, side_effect, payload):
        session = Mock()
        if side_effect is not None:
            session.get.side_effect = side_effect
        else:
            session.get.return_value = json_response(payload)

        with pytest.raises(PositionUnavailable):
            HttpPositionProvider("http://geo", session=session).get_current_position()

    @pytest.mark.parametrize("payload", [
        ["28.5", "77.1"],
        "28.5,77.1",
        {"lat": 200.0, "lon": 77.1},
        {"lat": 28.5, "lon": -181},
        {"lat": "nan", "lon": 77.1},
        {"latitude": 28.5, "longitude": float("inf")},
    ])
    def test_http_provider_rejects_unusable_replies(self, payload):
        session = Mock()
        session.get.return_value = json_response(payload)

        with pytest.raises(PositionUnavailable):
            HttpPositionProvider("http://geo", session=session).get_current_position()

    def test_build_from_config(self):
        static = type("Static", (PahalTestConfig,), {"CAMERA_LATITUDE": 28.6, "CAMERA_LONGITUDE": 77.2})
        http = type("Http", (PahalTestConfig,), {
            "CAMERA_LATITUDE": None, "CAMERA_LONGITUDE": None, "POSITION_URL": "http://geo",
        })
        none = type("NoPosition", (PahalTestConfig,), {
            "CAMERA_LATITUDE": None, "CAMERA_LONGITUDE": None, "POSITION_URL": "",
        })

        assert isinstance(build_position_provider(static), StaticPositionProvider)
        assert isinstance(build_position_provider(http), HttpPositionProvider)
        assert isinstance(build_position_provider(none), NullPositionProvider)


class TestGeolocator:
    def test_locate(self):
        location = Geolocator(StaticPositionProvider(28.6, 77.2), FakeGeocoder("Connaught Place")).locate()
        assert location.to_dict() == {"lat": 28.6, "lng": 77.2, "address": "Connaught Place"}

    def test_unavailable_position_returns_none(self):
        assert Geolocator(NullPositionProvider(), FakeGeocoder()).locate() is None

    def test_out_of_range_static_position_returns_none(self):
        assert Geolocator(StaticPositionProvider(95.0, 77.2), FakeGeocoder()).locate() is None


@pytest.mark.parametrize("lat, lng, expected", [
    (28.6, 77.2, True),
    (90.0, -180.0, True),
    (90.1, 0.0, False),
    (0.0, 180.5, False),
    (float("nan"), 0.0, False),
    (0.0, float("-inf"), False),
])
def test_is_valid_position(lat, lng, expected):
    assert is_valid_position(lat, lng) is expected
