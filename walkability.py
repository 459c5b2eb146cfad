"""
Walkability & Bikeability — infrastructure density plus amenity proximity.

Derives two 0-100 indices for a listing:

  walk_score = min(100, walk_infra + walk_amenity)
      walk_infra   = min(50, footways*2 + crossings*3 + sidewalks*2)
      walk_amenity = min(50, amenities*2)

  bike_score = min(100, round(bike_infra + bike_amenity))
      bike_infra   = min(60, cycleways*4)
      bike_amenity = min(40, amenities*1.5)

where amenities = restaurants + shops + healthcare + schools + bus stops +
train stations from the already-computed NearbyData.

Infrastructure comes from a second Overpass query within INFRA_RADIUS_M:
cycleways, footway/pedestrian ways, designated bicycle/foot ways, crossing
nodes and roads tagged with a sidewalk.

Limitations:
  - Raw segment counts favour densely mapped city centres; a long
    unbroken cycle track counts once, a fragmented one many times.
  - Sidewalk tagging on Swedish roads is sparse outside the largest
    cities, so walk scores there lean on amenity counts.
"""

import logging
import math
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from expiring_cache import ExpiringCache, coord_key
from hy_trace import record_cache_hit
from nearby_amenities import NearbyData
from overpass_http import overpass_query

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

INFRA_RADIUS_M = 1000
OVERPASS_TIMEOUT = 12  # seconds

WALK_INFRA_CAP = 50
WALK_AMENITY_CAP = 50
BIKE_INFRA_CAP = 60
BIKE_AMENITY_CAP = 40

# sidewalk=* values that indicate a sidewalk exists.
SIDEWALK_PRESENT = {"both", "left", "right", "yes", "separate"}

_LABEL_TIERS = (
    (90, "Excellent"),
    (70, "Very good"),
    (50, "Good"),
    (25, "Acceptable"),
)
CAR_DEPENDENT = "Car-dependent"


def score_label(score: int) -> str:
    """Map a 0-100 score to its tier label."""
    for threshold, label in _LABEL_TIERS:
        if score >= threshold:
            return label
    return CAR_DEPENDENT


# Order matters: an element is credited to the first rule it matches.
INFRA_RULES: Tuple[Tuple[str, Callable[[Dict[str, str]], bool]], ...] = (
    ("cycleways", lambda t: t.get("highway") == "cycleway"
        or t.get("bicycle") == "designated"),
    ("footways", lambda t: t.get("highway") in ("footway", "pedestrian")
        or t.get("foot") == "designated"),
    ("crossings", lambda t: t.get("highway") == "crossing"),
    ("sidewalks", lambda t: str(t.get("sidewalk", "")).lower() in SIDEWALK_PRESENT),
)


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class InfrastructureCounts:
    cycleways: int = 0
    footways: int = 0
    crossings: int = 0
    sidewalks: int = 0


@dataclass
class WalkabilityData:
    walk_score: int = 0
    bike_score: int = 0
    walk_label: str = CAR_DEPENDENT
    bike_label: str = CAR_DEPENDENT
    cycleways: int = 0
    footways: int = 0
    crossings: int = 0
    sidewalks: int = 0


# =============================================================================
# SCORING
# =============================================================================

def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def amenity_count(nearby: NearbyData) -> int:
    return (
        nearby.restaurants + nearby.shops + nearby.healthcare + nearby.schools
        + nearby.bus_stops.count + nearby.train_stations.count
    )


def compute_scores(infra: InfrastructureCounts, amenities: int) -> WalkabilityData:
    """Pure scoring step; all inputs must be non-negative."""
    walk_infra = min(
        WALK_INFRA_CAP,
        infra.footways * 2 + infra.crossings * 3 + infra.sidewalks * 2,
    )
    walk_amenity = min(WALK_AMENITY_CAP, amenities * 2)
    walk_score = min(100, walk_infra + walk_amenity)

    bike_infra = min(BIKE_INFRA_CAP, infra.cycleways * 4)
    bike_amenity = min(BIKE_AMENITY_CAP, amenities * 1.5)
    bike_score = min(100, _round_half_up(bike_infra + bike_amenity))

    return WalkabilityData(
        walk_score=walk_score,
        bike_score=bike_score,
        walk_label=score_label(walk_score),
        bike_label=score_label(bike_score),
        cycleways=infra.cycleways,
        footways=infra.footways,
        crossings=infra.crossings,
        sidewalks=infra.sidewalks,
    )


# =============================================================================
# OVERPASS QUERY
# =============================================================================

def _build_query(lat: float, lng: float, radius_m: int = INFRA_RADIUS_M) -> str:
    around = f"(around:{radius_m},{lat},{lng})"
    return f"""
    [out:json][timeout:{OVERPASS_TIMEOUT}];
    (
      way["highway"="cycleway"]{around};
      way["highway"~"^(footway|pedestrian)$"]{around};
      way["bicycle"="designated"]{around};
      way["foot"="designated"]{around};
      node["highway"="crossing"]{around};
      way["sidewalk"~"^(both|left|right|yes|separate)$"]{around};
    );
    out tags;
    """


def classify_infrastructure(tags: Dict[str, str]) -> Optional[str]:
    for category, predicate in INFRA_RULES:
        if predicate(tags):
            return category
    return None


def _parse_infrastructure(data: dict) -> InfrastructureCounts:
    counts = InfrastructureCounts()
    for element in data.get("elements") or []:
        category = classify_infrastructure(element.get("tags") or {})
        if category is not None:
            setattr(counts, category, getattr(counts, category) + 1)
    return counts


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

def assess_walkability(
    lat: float,
    lng: float,
    nearby: NearbyData,
    cache: Optional[ExpiringCache] = None,
) -> WalkabilityData:
    """Walk and bike scores for (lat, lng).  Never raises.

    Only the infrastructure counts are cached; scores are recomputed from
    the supplied NearbyData on every call.
    """
    try:
        amenities = amenity_count(nearby)
    except Exception:
        logger.info("Unusable NearbyData for walkability", exc_info=True)
        return WalkabilityData()

    key = coord_key("walkability", lat, lng)
    infra = cache.get(key) if cache is not None else None
    if infra is not None:
        record_cache_hit("overpass", "walkability")
    else:
        try:
            data = overpass_query(
                _build_query(lat, lng), caller="walkability",
                timeout=OVERPASS_TIMEOUT,
            )
            infra = _parse_infrastructure(data)
        except Exception:
            logger.info("Walkability infrastructure lookup failed for (%.4f, %.4f)",
                        lat, lng, exc_info=True)
            return WalkabilityData()
        if cache is not None:
            cache.set(key, infra)

    return compute_scores(infra, amenities)


def serialize_for_result(walkability: Optional[WalkabilityData]) -> Optional[dict]:
    if walkability is None:
        return None
    return {
        "walk_score": walkability.walk_score,
        "bike_score": walkability.bike_score,
        "walk_label": walkability.walk_label,
        "bike_label": walkability.bike_label,
        "cycleways": walkability.cycleways,
        "footways": walkability.footways,
        "crossings": walkability.crossings,
        "sidewalks": walkability.sidewalks,
    }
