"""Unit tests for geocoder.py — Nominatim lookup and city fallback chain."""

from unittest.mock import patch

import requests

from conftest import mock_response
from geocoder import (
    CITY_MAX_CHARS,
    UNKNOWN_CITY,
    first_address_segment,
    geocode_address,
)


def _hit(lat="59.3182", lon="18.0717", address=None, display="Götgatan 12, Södermalm"):
    return [{
        "lat": lat,
        "lon": lon,
        "display_name": display,
        "address": address if address is not None else {"city": "Stockholm"},
    }]


class TestFirstAddressSegment:
    def test_first_segment(self):
        assert first_address_segment("Storgatan 1, Umeå") == "Storgatan 1"

    def test_empty_address_is_unknown(self):
        assert first_address_segment("  ") == UNKNOWN_CITY


class TestGeocodeAddress:
    def test_success(self):
        with patch("geocoder.fetch", return_value=mock_response(200, _hit())) as f:
            result = geocode_address("Götgatan 12, Stockholm")

        assert result.lat == 59.3182
        assert result.lng == 18.0717
        assert result.city == "Stockholm"
        assert result.display_name == "Götgatan 12, Södermalm"
        kwargs = f.call_args.kwargs
        assert kwargs["params"]["format"] == "json"
        assert kwargs["params"]["limit"] == 1
        assert kwargs["params"]["addressdetails"] == 1
        assert "User-Agent" in kwargs["headers"]
        assert kwargs["timeout"] == 5

    def test_city_falls_back_to_town_then_municipality(self):
        with patch("geocoder.fetch",
                   return_value=mock_response(200, _hit(address={"town": "Kiruna"}))):
            assert geocode_address("x").city == "Kiruna"
        with patch("geocoder.fetch",
                   return_value=mock_response(200, _hit(address={"municipality": "Lerums kommun"}))):
            assert geocode_address("x").city == "Lerums kommun"

    def test_city_falls_back_to_first_address_segment(self):
        with patch("geocoder.fetch", return_value=mock_response(200, _hit(address={}))):
            assert geocode_address("Industrivägen 3, Nowhere").city == "Industrivägen 3"

    def test_city_is_capped(self):
        long_city = "A" * 250
        with patch("geocoder.fetch",
                   return_value=mock_response(200, _hit(address={"city": long_city}))):
            assert len(geocode_address("x").city) == CITY_MAX_CHARS

    def test_empty_result_returns_none(self):
        with patch("geocoder.fetch", return_value=mock_response(200, [])):
            assert geocode_address("Ingenstans 1") is None

    def test_non_numeric_coordinates_return_none(self):
        with patch("geocoder.fetch", return_value=mock_response(200, _hit(lat="abc"))):
            assert geocode_address("x") is None

    def test_malformed_hit_returns_none(self):
        with patch("geocoder.fetch", return_value=mock_response(200, ["Stockholm"])):
            assert geocode_address("x") is None

    def test_non_object_address_details_fall_back_to_first_segment(self):
        with patch("geocoder.fetch",
                   return_value=mock_response(200, _hit(address=["Stockholm"]))):
            assert geocode_address("Götgatan 12, Stockholm").city == "Götgatan 12"

    def test_http_error_returns_none(self):
        with patch("geocoder.fetch", return_value=mock_response(503)):
            assert geocode_address("x") is None

    def test_network_failure_is_retried_then_returns_none(self):
        with patch.object(requests.Session, "request",
                          side_effect=requests.exceptions.ConnectionError()) as req:
            assert geocode_address("x") is None
        assert req.call_count == 3

    def test_blank_address_skips_network(self):
        with patch("geocoder.fetch") as f:
            assert geocode_address("   ") is None
        f.assert_not_called()
