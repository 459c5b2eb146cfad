"""
Municipal Profile — SCB population plus static reference figures.

Fetches the registered population for a municipality from the Statistics
Sweden (SCB) PxWeb API and combines it with the static reference tables in
municipal_reference.py (median income, working-age share, businesses,
crime rate).

Data source:
  - SCB PxWeb API, table BE0101A/FolkmangdKommunLän, content BE0101N1
    (population 31 December of the requested year)

Limitations:
  - Only ~35 larger municipalities are mapped from city names.  Addresses
    in other municipalities get no demographic section at all.
  - Population and reference figures are not necessarily from the same
    year.

Completeness rule: without a population figure there is no
DemographicsData at all, never a partial one.
"""

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

from expiring_cache import ExpiringCache
from http_fetch import FetchError, fetch, fetch_with_retry
from hy_trace import record_cache_hit
from municipal_reference import (
    NOT_FOUND,
    UNMAPPED_CODE,
    lookup_crime_rate,
    lookup_profile,
    municipality_code,
)

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

SCB_POPULATION_URL = os.environ.get(
    "SCB_POPULATION_URL",
    "https://api.scb.se/OV0104/v1/doris/sv/ssd/START/BE/BE0101/BE0101A/FolkmangdKommunLän",
)
SCB_POPULATION_YEAR = os.environ.get("SCB_POPULATION_YEAR", "2024")
_SCB_POPULATION_CONTENT = "BE0101N1"
_SCB_TIMEOUT = 5  # seconds


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class DemographicsData:
    population: int
    city: str
    median_income: Optional[int] = None        # tkr/year
    working_age_percent: Optional[float] = None
    total_businesses: Optional[int] = None
    crime_rate: Optional[int] = None           # per 100 000 residents


# =============================================================================
# SCB POPULATION
# =============================================================================

def _population_query(code: str) -> Dict[str, Any]:
    return {
        "query": [
            {"code": "Region", "selection": {"filter": "item", "values": [code]}},
            {"code": "ContentsCode",
             "selection": {"filter": "item", "values": [_SCB_POPULATION_CONTENT]}},
            {"code": "Tid",
             "selection": {"filter": "item", "values": [SCB_POPULATION_YEAR]}},
        ],
        "response": {"format": "json"},
    }


def _row_code(row: dict) -> Optional[str]:
    key = row.get("key")
    return key[0] if isinstance(key, list) and key else None


def _parse_population(data: Any, code: str) -> Optional[int]:
    rows = data.get("data") if isinstance(data, dict) else None
    if not isinstance(rows, list):
        return None
    rows = [r for r in rows if isinstance(r, dict)]
    if not rows:
        return None
    row = next(
        (r for r in rows if _row_code(r) == code),
        rows[0],
    )
    values = row.get("values")
    if not isinstance(values, list) or not values:
        return None
    try:
        population = int(float(values[0]))
    except (TypeError, ValueError, OverflowError):
        return None
    return population if population > 0 else None


def fetch_population(code: str) -> Optional[int]:
    """Population for a kommun code, or None on any failure."""
    if code == UNMAPPED_CODE:
        return None
    try:
        resp = fetch_with_retry(lambda: fetch(
            "POST",
            SCB_POPULATION_URL,
            timeout=_SCB_TIMEOUT,
            service="scb",
            endpoint="population",
            json=_population_query(code),
        ))
    except FetchError:
        logger.info("SCB population request failed for %s", code, exc_info=True)
        return None

    if not resp.ok:
        logger.info("SCB API returned %d for %s", resp.status_code, code)
        return None
    try:
        data = resp.json()
    except ValueError:
        logger.info("SCB API returned non-JSON for %s", code)
        return None
    return _parse_population(data, code)


# =============================================================================
# PUBLIC API
# =============================================================================

def get_demographics(
    city: str, cache: Optional[ExpiringCache] = None,
) -> Optional[DemographicsData]:
    """Demographic profile for *city*, or None when population is unknown."""
    code = municipality_code(city)
    if code == UNMAPPED_CODE:
        logger.debug("No municipality code for %r", city)
        return None

    key = f"demographics:{code}"
    if cache is not None:
        cached = cache.get(key)
        if cached is not None:
            record_cache_hit("scb", "population")
            return cached

    try:
        population = fetch_population(code)
    except Exception:
        logger.warning("Unexpected error fetching population for %s", code,
                       exc_info=True)
        return None
    if population is None:
        return None

    demographics = DemographicsData(
        population=population,
        city=(city or "").strip() or "Kommunen",
        crime_rate=lookup_crime_rate(code).per_100k,
    )
    profile = lookup_profile(code)
    if profile is not NOT_FOUND:
        demographics.median_income = profile.median_income
        demographics.working_age_percent = profile.working_age_percent
        demographics.total_businesses = profile.total_businesses

    if cache is not None:
        cache.set(key, demographics)
    return demographics


def serialize_for_result(demographics: Optional[DemographicsData]) -> Optional[dict]:
    """JSON-ready dict; optional figures are omitted when absent."""
    if demographics is None:
        return None
    out: Dict[str, Any] = {
        "population": demographics.population,
        "city": demographics.city,
    }
    for name in ("median_income", "working_age_percent",
                 "total_businesses", "crime_rate"):
        value = getattr(demographics, name)
        if value is not None:
            out[name] = value
    return out
