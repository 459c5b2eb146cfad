"""
Address geocoding via the OpenStreetMap Nominatim search API.

Resolves a free-text Swedish address to coordinates and a locality name.
Nominatim's usage policy requires an identifying User-Agent; set
NOMINATIM_USER_AGENT in production.

Returns None on any failure.  Callers then proceed without geodata: city
falls back to the first comma segment of the address and coordinates to
(0, 0).
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

from http_fetch import FetchError, fetch, fetch_with_retry

logger = logging.getLogger(__name__)

NOMINATIM_BASE_URL = os.environ.get(
    "NOMINATIM_BASE_URL", "https://nominatim.openstreetmap.org/search"
)
NOMINATIM_USER_AGENT = os.environ.get(
    "NOMINATIM_USER_AGENT", "HittaYta.se/1.0 (commercial; listing generator)"
)
GEOCODE_TIMEOUT = 5  # seconds

UNKNOWN_CITY = "Okänd ort"
CITY_MAX_CHARS = 100

# Nominatim address components, most specific locality first.
_CITY_FIELDS = ("city", "town", "village", "municipality", "county")


@dataclass
class GeocodeResult:
    lat: float
    lng: float
    city: str
    display_name: str


def first_address_segment(address: str) -> str:
    """First comma-separated segment of *address*, or UNKNOWN_CITY."""
    first = (address or "").split(",")[0].strip()
    return first or UNKNOWN_CITY


def _pick_city(components: dict, address: str) -> str:
    for key in _CITY_FIELDS:
        value = components.get(key)
        if value and str(value).strip():
            return str(value).strip()[:CITY_MAX_CHARS]
    return first_address_segment(address)[:CITY_MAX_CHARS]


def _parse_result(data, address: str) -> Optional[GeocodeResult]:
    if not isinstance(data, list) or not data:
        return None
    first = data[0]
    if not isinstance(first, dict):
        return None
    try:
        lat = float(first.get("lat"))
        lng = float(first.get("lon"))
    except (TypeError, ValueError):
        return None
    if lat != lat or lng != lng:  # NaN
        return None
    components = first.get("address")
    if not isinstance(components, dict):
        components = {}
    return GeocodeResult(
        lat=lat,
        lng=lng,
        city=_pick_city(components, address),
        display_name=first.get("display_name") or address,
    )


def geocode_address(address: str) -> Optional[GeocodeResult]:
    """Resolve *address* to a GeocodeResult, or None."""
    query = (address or "").strip()
    if not query:
        return None

    params = {
        "q": query,
        "format": "json",
        "limit": 1,
        "addressdetails": 1,
    }
    try:
        resp = fetch_with_retry(lambda: fetch(
            "GET",
            NOMINATIM_BASE_URL,
            timeout=GEOCODE_TIMEOUT,
            service="nominatim",
            endpoint="search",
            params=params,
            headers={"User-Agent": NOMINATIM_USER_AGENT},
        ))
    except FetchError:
        logger.info("Geocoding unavailable for %r", query, exc_info=True)
        return None

    if not resp.ok:
        logger.info("Nominatim returned %d for %r", resp.status_code, query)
        return None

    try:
        data = resp.json()
    except ValueError:
        logger.info("Nominatim returned non-JSON for %r", query)
        return None

    result = _parse_result(data, query)
    if result is None:
        logger.info("No geocoding match for %r", query)
    return result
