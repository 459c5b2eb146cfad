"""
Nearby amenities — OpenStreetMap point-of-interest density around a listing.

One batched Overpass query collects food & drink, shops, fitness, parking
and healthcare within POI_RADIUS_M, and bus stops, train stations and
education within TRANSIT_RADIUS_M.  Every returned element is classified
into exactly one bucket by AMENITY_RULES (first match wins), and the
nearest bus stop and train station are picked by great-circle distance.

Data source:
  - OpenStreetMap Overpass API (amenity=*, shop=*, leisure=*, highway=*,
    railway=*, building=* tags)

Limitations:
  - Counts reflect OSM mapping completeness.  Shops in suburban strip
    malls are often mapped as one building outline, not individual units.
  - Ways (parking lots, school grounds) are located by their bounding-box
    center, which can sit a few hundred metres from the entrance.

Failures never propagate: get_nearby_amenities() returns an all-zero
NearbyData when Overpass is unavailable.
"""

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Pattern, Tuple

from expiring_cache import ExpiringCache, coord_key
from hy_trace import record_cache_hit
from overpass_http import element_coords, overpass_query

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

POI_RADIUS_M = 2500
TRANSIT_RADIUS_M = 3000
OVERPASS_TIMEOUT = 12  # seconds

EARTH_RADIUS_M = 6_371_000

# Localized name tag tried after name=*.
LOCAL_NAME_TAG = "name:sv"


@dataclass(frozen=True)
class ClassificationRule:
    """Assign *category* when any of *tag_keys* matches *pattern*."""
    category: str
    tag_keys: Tuple[str, ...]
    pattern: Pattern[str]

    def matches(self, tags: Dict[str, str]) -> bool:
        return any(
            self.pattern.search(str(tags.get(key, "")))
            for key in self.tag_keys
            if tags.get(key)
        )


def _rule(category: str, tag_keys: Tuple[str, ...], regex: str) -> ClassificationRule:
    return ClassificationRule(category, tag_keys, re.compile(regex, re.IGNORECASE))


# Order matters: an element is credited to the first rule it matches.
AMENITY_RULES: Tuple[ClassificationRule, ...] = (
    _rule("restaurants", ("amenity",), r"^(restaurant|cafe|bar|pub|fast_food)$"),
    _rule("shops", ("shop",), r".+"),
    _rule("gyms", ("amenity", "leisure"), r"^(gym|fitness_centre|sports_centre)$"),
    _rule("bus_stops", ("highway",), r"^bus_stop$"),
    _rule("train_stations", ("railway",), r"^(station|halt)$"),
    _rule("parking", ("amenity",), r"^parking$"),
    _rule("schools", ("amenity", "building"), r"^(school|university|college|kindergarten)$"),
    _rule("healthcare", ("amenity",), r"^(pharmacy|clinic|hospital|doctors|dentist)$"),
)


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class TransitSummary:
    """Count plus the nearest stop; nearest fields are set only when count > 0."""
    count: int = 0
    nearest_name: Optional[str] = None
    nearest_distance_m: Optional[int] = None


@dataclass
class NearbyData:
    restaurants: int = 0
    shops: int = 0
    gyms: int = 0
    parking: int = 0
    schools: int = 0
    healthcare: int = 0
    bus_stops: TransitSummary = field(default_factory=TransitSummary)
    train_stations: TransitSummary = field(default_factory=TransitSummary)

    @property
    def is_empty(self) -> bool:
        return (
            self.restaurants == self.shops == self.gyms == self.parking
            == self.schools == self.healthcare == 0
            and self.bus_stops.count == 0
            and self.train_stations.count == 0
        )


# =============================================================================
# GEOMETRY
# =============================================================================

def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in metres."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlmb = math.radians(lng2 - lng1)
    a = (
        math.sin(dphi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    )
    return 2 * EARTH_RADIUS_M * math.asin(math.sqrt(min(1.0, a)))


def element_name(tags: Dict[str, str]) -> str:
    return tags.get("name") or tags.get(LOCAL_NAME_TAG) or tags.get("ref") or ""


def nearest_element(
    lat: float, lng: float, elements: List[Dict[str, Any]],
) -> Optional[Tuple[Dict[str, Any], float]]:
    """Closest element with coordinates, ties resolved by input order."""
    candidates = []
    for element in elements:
        coords = element_coords(element)
        if coords is None:
            continue
        candidates.append((haversine_m(lat, lng, coords[0], coords[1]), element))
    if not candidates:
        return None
    # sort() is stable, so equal distances keep their input order.
    candidates.sort(key=lambda pair: pair[0])
    distance, element = candidates[0]
    return element, distance


# =============================================================================
# OVERPASS QUERY
# =============================================================================

def _build_query(lat: float, lng: float) -> str:
    poi = f"(around:{POI_RADIUS_M},{lat},{lng})"
    transit = f"(around:{TRANSIT_RADIUS_M},{lat},{lng})"
    return f"""
    [out:json][timeout:{OVERPASS_TIMEOUT}];
    (
      node["amenity"~"^(restaurant|cafe|bar|pub|fast_food)$"]{poi};
      node["shop"]{poi};
      nwr["leisure"~"^(fitness_centre|sports_centre)$"]{poi};
      node["amenity"="gym"]{poi};
      node["highway"="bus_stop"]{transit};
      node["railway"~"^(station|halt)$"]{transit};
      nwr["amenity"="parking"]{poi};
      nwr["amenity"~"^(school|university|college|kindergarten)$"]{transit};
      nwr["amenity"~"^(pharmacy|clinic|hospital|doctors|dentist)$"]{poi};
    );
    out center tags;
    """


def classify_element(tags: Dict[str, str]) -> Optional[str]:
    for rule in AMENITY_RULES:
        if rule.matches(tags):
            return rule.category
    return None


def _summarize_transit(lat: float, lng: float,
                       elements: List[Dict[str, Any]]) -> TransitSummary:
    summary = TransitSummary(count=len(elements))
    if not elements:
        return summary
    found = nearest_element(lat, lng, elements)
    if found is not None:
        element, distance = found
        summary.nearest_name = element_name(element.get("tags") or {})
        summary.nearest_distance_m = int(round(distance))
    return summary


def _parse_nearby(lat: float, lng: float, data: Dict[str, Any]) -> NearbyData:
    counts = {rule.category: 0 for rule in AMENITY_RULES}
    transit: Dict[str, List[Dict[str, Any]]] = {"bus_stops": [], "train_stations": []}

    for element in data.get("elements") or []:
        category = classify_element(element.get("tags") or {})
        if category is None:
            continue
        counts[category] += 1
        if category in transit:
            transit[category].append(element)

    return NearbyData(
        restaurants=counts["restaurants"],
        shops=counts["shops"],
        gyms=counts["gyms"],
        parking=counts["parking"],
        schools=counts["schools"],
        healthcare=counts["healthcare"],
        bus_stops=_summarize_transit(lat, lng, transit["bus_stops"]),
        train_stations=_summarize_transit(lat, lng, transit["train_stations"]),
    )


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

def get_nearby_amenities(
    lat: float, lng: float, cache: Optional[ExpiringCache] = None,
) -> NearbyData:
    """Count amenities around (lat, lng).  Never raises."""
    key = coord_key("nearby", lat, lng)
    if cache is not None:
        cached = cache.get(key)
        if cached is not None:
            record_cache_hit("overpass", "nearby_amenities")
            return cached

    try:
        data = overpass_query(
            _build_query(lat, lng), caller="nearby_amenities",
            timeout=OVERPASS_TIMEOUT,
        )
        nearby = _parse_nearby(lat, lng, data)
    except Exception:
        logger.info("Nearby amenity lookup failed for (%.4f, %.4f)",
                    lat, lng, exc_info=True)
        return NearbyData()

    if cache is not None:
        cache.set(key, nearby)
    return nearby


def serialize_for_result(nearby: Optional[NearbyData]) -> Optional[dict]:
    if nearby is None:
        return None

    def _transit(t: TransitSummary) -> dict:
        out: Dict[str, Any] = {"count": t.count}
        if t.count > 0 and t.nearest_name is not None:
            out["nearest_name"] = t.nearest_name
            out["nearest_distance_m"] = t.nearest_distance_m
        return out

    return {
        "restaurants": nearby.restaurants,
        "shops": nearby.shops,
        "gyms": nearby.gyms,
        "parking": nearby.parking,
        "schools": nearby.schools,
        "healthcare": nearby.healthcare,
        "bus_stops": _transit(nearby.bus_stops),
        "train_stations": _transit(nearby.train_stations),
    }
