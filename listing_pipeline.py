#!/usr/bin/env python3
"""
Listing Pipeline
----------------
Area enrichment and AI copy generation for commercial-property listings.

    input -> geocode -> { nearby -> walkability | demographics |
                          area context | price context } -> AI copy

Geocoding runs first (unless the caller supplies coordinates).  The four
enrichment branches then run concurrently; walkability reuses the amenity
counts, so it runs after them in the same worker.  Each branch soft-fails
to its documented default.  Only the AI step can abort the request, with
ListingGenerationError.

Usage:
    python listing_pipeline.py "Götgatan 12, Stockholm" --type rent \\
        --category kontor --price 15000 --size 120 [--json] [--area-only]
"""

import argparse
import json
import logging
import math
import os
import re
import sys
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import sentry_sdk
from dotenv import load_dotenv

import area_context
import municipal_stats
import nearby_amenities
import price_context
import walkability
from area_context import AreaContext, get_area_context
from content_generator import (
    GenerationRequest,
    ListingGenerationError,
    build_prompt,
    create_client,
    format_number,
    generate_listing_copy,
)
from expiring_cache import ExpiringCache
from geocoder import first_address_segment, geocode_address
from hy_trace import TraceContext, clear_trace, get_trace, set_trace
from listing_store import ListingStore, SQLiteListingStore
from municipal_stats import DemographicsData, get_demographics
from nearby_amenities import NearbyData, get_nearby_amenities
from price_context import PriceContext, fetch_area_price_context
from walkability import WalkabilityData, assess_walkability

load_dotenv()

logger = logging.getLogger(__name__)

__all__ = [
    "AreaData",
    "GenerateInput",
    "GenerateResult",
    "InvalidListingInput",
    "ListingGenerationError",
    "fetch_area_data",
    "fetch_area_price_context",
    "generate_listing_content",
    "parse_generate_input",
]


# =============================================================================
# INPUT
# =============================================================================

VALID_TYPES = ("sale", "rent")
VALID_CATEGORIES = (
    "butik", "kontor", "lager", "restaurang", "verkstad",
    "showroom", "popup", "atelje", "gym", "ovrigt",
)
MAX_PRICE = 999_999_999
MAX_SIZE = 100_000
ADDRESS_MAX_CHARS = 300
HIGHLIGHTS_MAX_CHARS = 2000
MAX_IMAGES = 10

_POSTCODE = re.compile(r"^\d{3}\s?\d{2}\s*")


class InvalidListingInput(ValueError):
    """Caller-supplied listing facts failed validation."""


@dataclass
class GenerateInput:
    address: str
    type: str
    category: str
    price: int
    size: int
    highlights: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    images: List[str] = field(default_factory=list)

    @property
    def has_coordinates(self) -> bool:
        return valid_coordinates(self.lat, self.lng)


def valid_coordinates(lat: Optional[float], lng: Optional[float]) -> bool:
    if lat is None or lng is None:
        return False
    try:
        lat, lng = float(lat), float(lng)
    except (TypeError, ValueError):
        return False
    return (
        math.isfinite(lat) and math.isfinite(lng)
        and -90 <= lat <= 90 and -180 <= lng <= 180
    )


def _positive_int(payload: Dict[str, Any], name: str, upper: int) -> int:
    raw = payload.get(name)
    if isinstance(raw, bool):
        raise InvalidListingInput(f"{name} must be a number")
    try:
        value = int(float(str(raw).replace(" ", "")))
    except (TypeError, ValueError, OverflowError):
        raise InvalidListingInput(f"{name} must be a number")
    if value <= 0 or value > upper:
        raise InvalidListingInput(f"{name} must be between 1 and {upper}")
    return value


def _optional_coordinate(payload: Dict[str, Any], name: str) -> Optional[float]:
    raw = payload.get(name)
    if raw is None or raw == "":
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        raise InvalidListingInput(f"{name} must be a number")


def parse_generate_input(payload: Dict[str, Any]) -> GenerateInput:
    """Validate a request payload into a GenerateInput.

    Raises InvalidListingInput with a message naming the offending field.
    Coordinates outside the valid range are dropped rather than rejected,
    so the address gets geocoded instead.
    """
    if not isinstance(payload, dict):
        raise InvalidListingInput("payload must be an object")

    address = payload.get("address")
    if not isinstance(address, str) or not address.strip():
        raise InvalidListingInput("address is required")

    listing_type = str(payload.get("type") or "").strip().lower()
    if listing_type not in VALID_TYPES:
        raise InvalidListingInput(f"type must be one of {', '.join(VALID_TYPES)}")

    category = str(payload.get("category") or "").strip().lower()
    if category not in VALID_CATEGORIES:
        raise InvalidListingInput(
            f"category must be one of {', '.join(VALID_CATEGORIES)}"
        )

    price = _positive_int(payload, "price", MAX_PRICE)
    size = _positive_int(payload, "size", MAX_SIZE)

    highlights = payload.get("highlights")
    if highlights is not None and not isinstance(highlights, str):
        raise InvalidListingInput("highlights must be a string")
    if highlights is not None:
        highlights = highlights.strip()[:HIGHLIGHTS_MAX_CHARS] or None

    images = payload.get("images") or []
    if not isinstance(images, list) or not all(isinstance(u, str) for u in images):
        raise InvalidListingInput("images must be a list of URLs")

    lat = _optional_coordinate(payload, "lat")
    lng = _optional_coordinate(payload, "lng")
    if not valid_coordinates(lat, lng):
        lat = lng = None

    return GenerateInput(
        address=address.strip()[:ADDRESS_MAX_CHARS],
        type=listing_type,
        category=category,
        price=price,
        size=size,
        highlights=highlights,
        lat=lat,
        lng=lng,
        images=[u.strip() for u in images if u.strip()][:MAX_IMAGES],
    )


def city_from_address(address: str) -> str:
    """Best-effort city when coordinates are supplied without geocoding.

    The last comma segment (postcode stripped) when there are several,
    otherwise the first.
    """
    segments = [s.strip() for s in (address or "").split(",") if s.strip()]
    if len(segments) > 1:
        city = _POSTCODE.sub("", segments[-1]).strip()
        if city:
            return city
    return first_address_segment(address)


# =============================================================================
# RESULTS
# =============================================================================

@dataclass
class AreaData:
    demographics: Optional[DemographicsData] = None
    nearby: Optional[NearbyData] = None
    walkability: Optional[WalkabilityData] = None
    area_context: Optional[AreaContext] = None


@dataclass
class GenerateResult:
    title: str
    description: str
    tags: List[str]
    city: str
    address: str
    lat: float
    lng: float
    type: str
    category: str
    price: int
    size: int
    nearby: Optional[NearbyData] = None
    walkability: Optional[WalkabilityData] = None
    demographics: Optional[DemographicsData] = None
    price_context: Optional[PriceContext] = None
    area_context: Optional[AreaContext] = None
    area_summary: Optional[str] = None


def build_area_summary(area: AreaData) -> Optional[str]:
    """Plain-text digest of the enrichment, or None when there is nothing."""
    parts = []
    demo = area.demographics
    if demo is not None:
        text = f"{demo.city} har cirka {format_number(demo.population)} invånare"
        if demo.median_income is not None:
            text += f" och en medianinkomst på {format_number(demo.median_income)} tkr/år"
        parts.append(text + ".")

    nearby = area.nearby
    if nearby is not None and not nearby.is_empty:
        counts = [
            (nearby.restaurants, "restauranger"),
            (nearby.shops, "butiker"),
            (nearby.bus_stops.count, "busshållplatser"),
            (nearby.train_stations.count, "tågstationer"),
        ]
        listed = [f"{n} {label}" for n, label in counts if n > 0]
        if listed:
            parts.append("Inom gångavstånd finns " + ", ".join(listed) + ".")

    walk = area.walkability
    if walk is not None and walk.walk_score > 0:
        parts.append(f"Gångbarhet {walk.walk_score}/100 ({walk.walk_label}).")
    return " ".join(parts) or None


# =============================================================================
# STAGES
# =============================================================================

# Process-lifetime cache shared by every request unless one is injected.
_default_cache = ExpiringCache()


def _timed_stage(stage_name, fn, *args, **kwargs):
    """Run *fn* with timing.  Logs duration and re-raises on failure."""
    trace = get_trace()
    if trace:
        trace.start_stage(stage_name)
    t0 = time.time()
    try:
        result = fn(*args, **kwargs)
        t1 = time.time()
        if trace:
            trace.record_stage(stage_name, t0, t1)
            trace.end_stage()
        else:
            logger.info("  [stage] %s OK (%.1fs)", stage_name, t1 - t0)
        return result
    except Exception as exc:
        t1 = time.time()
        if trace:
            trace.record_stage(
                stage_name, t0, t1,
                error_class=type(exc).__name__,
                error_message=str(exc)[:200],
            )
            trace.end_stage()
        else:
            logger.warning("  [stage] %s FAILED (%.1fs)", stage_name, t1 - t0, exc_info=True)
        raise


def _timed_stage_in_thread(parent_trace, stage_name, fn, *args, **kwargs):
    """Run _timed_stage in a child thread with trace propagation."""
    set_trace(parent_trace)
    try:
        return _timed_stage(stage_name, fn, *args, **kwargs)
    finally:
        clear_trace()


def _nearby_and_walkability(lat: float, lng: float, cache: Optional[ExpiringCache]):
    nearby = _timed_stage("nearby", get_nearby_amenities, lat, lng, cache=cache)
    walk = _timed_stage(
        "walkability", assess_walkability, lat, lng, nearby, cache=cache,
    )
    return nearby, walk


def _run_enrichment(
    city: str,
    lat: Optional[float],
    lng: Optional[float],
    address: Optional[str],
    cache: Optional[ExpiringCache],
    price_args: Optional[tuple] = None,
):
    """Fan out every enrichment branch and collect (AreaData, PriceContext).

    Geodata branches are skipped without coordinates and report the
    all-zero defaults.  A branch that raises leaves its field at the default.
    """
    area = AreaData()
    prices = None
    parent_trace = get_trace()

    futures: Dict[str, Any] = {}
    with ThreadPoolExecutor(max_workers=4) as pool:
        if lat is not None and lng is not None:
            futures["geodata"] = pool.submit(
                _timed_stage_in_thread, parent_trace,
                "geodata", _nearby_and_walkability, lat, lng, cache,
            )
        futures["demographics"] = pool.submit(
            _timed_stage_in_thread, parent_trace,
            "demographics", get_demographics, city, cache=cache,
        )
        futures["area_context"] = pool.submit(
            _timed_stage_in_thread, parent_trace,
            "area_context", get_area_context, city, address, cache=cache,
        )
        if price_args is not None:
            futures["price_context"] = pool.submit(
                _timed_stage_in_thread, parent_trace,
                "price_context", fetch_area_price_context, *price_args,
            )

        # Collect results; each branch fails independently
        for stage_name, future in futures.items():
            try:
                stage_result = future.result()
            except Exception:
                logger.warning("Enrichment stage %s failed", stage_name, exc_info=True)
                continue
            if stage_name == "geodata":
                area.nearby, area.walkability = stage_result
            elif stage_name == "demographics":
                area.demographics = stage_result
            elif stage_name == "area_context":
                area.area_context = stage_result
            elif stage_name == "price_context":
                prices = stage_result

    if area.nearby is None:
        area.nearby = NearbyData()
    if area.walkability is None:
        area.walkability = WalkabilityData()
    return area, prices


# =============================================================================
# PUBLIC API
# =============================================================================

def fetch_area_data(
    city: str,
    lat: float,
    lng: float,
    address: Optional[str] = None,
    cache: Optional[ExpiringCache] = None,
) -> AreaData:
    """Enrichment payload for a resolved location.  Never raises."""
    if cache is None:
        cache = _default_cache
    area, _ = _run_enrichment(city, lat, lng, address, cache)
    return area


def generate_listing_content(
    listing: GenerateInput,
    ai_api_key: str,
    cache: Optional[ExpiringCache] = None,
    store: Optional[ListingStore] = None,
    client=None,
) -> GenerateResult:
    """Enrich *listing* and generate its title, description and tags.

    Raises ListingGenerationError when every AI strategy fails; every other
    failure degrades to a missing section.  A blank *ai_api_key* raises
    ValueError before any network call.
    """
    if client is None:
        client = create_client(ai_api_key)
    if cache is None:
        cache = _default_cache
    if store is None:
        store = SQLiteListingStore()

    owns_trace = get_trace() is None
    trace = get_trace() or TraceContext(trace_id=uuid.uuid4().hex[:12])
    set_trace(trace)
    try:
        lat: Optional[float] = None
        lng: Optional[float] = None
        display_name = None
        if listing.has_coordinates:
            lat, lng = float(listing.lat), float(listing.lng)
            city = city_from_address(listing.address)
        else:
            geo = _timed_stage("geocode", geocode_address, listing.address)
            if geo is not None:
                lat, lng, city, display_name = geo.lat, geo.lng, geo.city, geo.display_name
            else:
                logger.info("Geocoding failed for %r; continuing without coordinates",
                            listing.address)
                city = first_address_segment(listing.address)

        area, prices = _run_enrichment(
            city, lat, lng, listing.address, cache,
            price_args=(city, listing.category, listing.type, store),
        )

        prompt = build_prompt(
            listing, city,
            display_name=display_name,
            nearby=area.nearby,
            walkability=area.walkability,
            demographics=area.demographics,
            price_context=prices,
            area_context=area.area_context,
        )
        request = GenerationRequest(prompt=prompt, images=list(listing.images))
        copy = _timed_stage("generate", generate_listing_copy, client, request)

        return GenerateResult(
            title=copy.title,
            description=copy.description,
            tags=copy.tags,
            city=city,
            address=listing.address.strip()[:ADDRESS_MAX_CHARS],
            lat=lat if lat is not None else 0.0,
            lng=lng if lng is not None else 0.0,
            type=listing.type,
            category=listing.category,
            price=listing.price,
            size=listing.size,
            nearby=area.nearby,
            walkability=area.walkability,
            demographics=area.demographics,
            price_context=prices,
            area_context=area.area_context,
            area_summary=build_area_summary(area),
        )
    finally:
        if owns_trace:
            trace.log_summary()
            clear_trace()


# =============================================================================
# SERIALIZATION
# =============================================================================

def area_data_to_dict(area: AreaData) -> Dict[str, Any]:
    return {
        "demographics": municipal_stats.serialize_for_result(area.demographics),
        "nearby": nearby_amenities.serialize_for_result(area.nearby),
        "walkability": walkability.serialize_for_result(area.walkability),
        "area_context": area_context.serialize_for_result(area.area_context),
    }


def result_to_dict(result: GenerateResult) -> Dict[str, Any]:
    """JSON-ready dict for API responses and the CLI."""
    return {
        "title": result.title,
        "description": result.description,
        "tags": result.tags,
        "city": result.city,
        "address": result.address,
        "lat": result.lat,
        "lng": result.lng,
        "type": result.type,
        "category": result.category,
        "price": result.price,
        "size": result.size,
        "nearby": nearby_amenities.serialize_for_result(result.nearby),
        "walkability": walkability.serialize_for_result(result.walkability),
        "demographics": municipal_stats.serialize_for_result(result.demographics),
        "price_context": price_context.serialize_for_result(result.price_context),
        "area_context": area_context.serialize_for_result(result.area_context),
        "area_summary": result.area_summary,
    }


# =============================================================================
# CLI
# =============================================================================

def _init_sentry():
    dsn = os.environ.get("SENTRY_DSN")
    if dsn:
        sentry_sdk.init(dsn=dsn, traces_sample_rate=0.0)


def _print_result(result: GenerateResult):
    print(f"\n{result.title}")
    print("=" * min(len(result.title), 70))
    print(f"{result.address} ({result.city})  {result.lat:.5f}, {result.lng:.5f}")
    if result.tags:
        print("Taggar: " + ", ".join(result.tags))
    print()
    print(result.description)
    if result.area_summary:
        print(f"\nOmrådet: {result.area_summary}")
    if result.price_context:
        pc = result.price_context
        print(f"Jämförelse: {pc.count} annonser, median {format_number(pc.median_price)} kr")


def main():
    parser = argparse.ArgumentParser(
        description="Generate listing copy for a commercial property from its address"
    )
    parser.add_argument("address", nargs="?", help="Property address")
    parser.add_argument("--type", choices=VALID_TYPES, default="rent",
                        help="Listing type")
    parser.add_argument("--category", choices=VALID_CATEGORIES, default="kontor",
                        help="Property category")
    parser.add_argument("--price", type=int, help="Price in SEK (per month for rent)")
    parser.add_argument("--size", type=int, help="Floor area in square metres")
    parser.add_argument("--highlights", help="Free-text selling points")
    parser.add_argument("--image", action="append", default=[], dest="images",
                        help="Image URL (repeatable)")
    parser.add_argument(
        "--api-key",
        default=os.environ.get("OPENAI_API_KEY"),
        help="OpenAI API key (or set OPENAI_API_KEY env var)",
    )
    parser.add_argument("--json", action="store_true",
                        help="Output as JSON instead of formatted text")
    parser.add_argument("--area-only", action="store_true",
                        help="Only geocode and enrich; skip AI generation")

    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    _init_sentry()

    if not args.address:
        parser.print_help()
        sys.exit(1)

    if args.area_only:
        geo = geocode_address(args.address)
        if geo is None:
            print(f"Error: could not geocode {args.address!r}")
            sys.exit(1)
        area = fetch_area_data(geo.city, geo.lat, geo.lng, address=args.address)
        output = {"city": geo.city, "lat": geo.lat, "lng": geo.lng}
        output.update(area_data_to_dict(area))
        output["area_summary"] = build_area_summary(area)
        print(json.dumps(output, indent=2, ensure_ascii=False))
        return

    if not args.api_key:
        print("Error: OpenAI API key required. Set OPENAI_API_KEY or use --api-key")
        sys.exit(1)

    try:
        listing = parse_generate_input({
            "address": args.address,
            "type": args.type,
            "category": args.category,
            "price": args.price,
            "size": args.size,
            "highlights": args.highlights,
            "images": args.images,
        })
    except InvalidListingInput as exc:
        print(f"Error: {exc}")
        sys.exit(2)

    try:
        result = generate_listing_content(listing, args.api_key)
    except ListingGenerationError as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    if args.json:
        print(json.dumps(result_to_dict(result), indent=2, ensure_ascii=False))
    else:
        _print_result(result)


if __name__ == "__main__":
    main()
