"""
Area Context — short encyclopedic summary of the listing's district or city.

Two Wikipedia calls per search term:
  1. MediaWiki action API full-text search for the best-matching title
  2. REST page-summary endpoint for that title's lead extract

Search terms, in order:
  - "<district> <city>" when the address carries a locality segment that
    differs from the city (e.g. "Götgatan 12, Södermalm" in Stockholm)
  - "<city>"

The first extract of at least MIN_SUMMARY_CHARS characters wins.  Longer
extracts are trimmed to MAX_SUMMARY_CHARS at a sentence boundary.
"""

import logging
import os
import re
from dataclasses import dataclass
from typing import List, Optional
from urllib.parse import quote

from expiring_cache import ExpiringCache
from geocoder import NOMINATIM_USER_AGENT
from http_fetch import fetch, fetch_with_retry
from hy_trace import record_cache_hit

logger = logging.getLogger(__name__)

WIKIPEDIA_LANG = os.environ.get("WIKIPEDIA_LANG", "sv")
_SEARCH_URL = f"https://{WIKIPEDIA_LANG}.wikipedia.org/w/api.php"
_SUMMARY_URL = f"https://{WIKIPEDIA_LANG}.wikipedia.org/api/rest_v1/page/summary/"
_WIKI_TIMEOUT = 5  # seconds

MIN_SUMMARY_CHARS = 30
MAX_SUMMARY_CHARS = 350
# A sentence cut that leaves less than this is replaced by a hard cut.
MIN_SENTENCE_CUT = 100

_POSTCODE = re.compile(r"^\d{3}\s?\d{2}\s*")
_SENTENCE_END = re.compile(r"[.!?](?=\s|$)")


@dataclass
class AreaContext:
    summary: str
    title: str
    url: str


# =============================================================================
# HELPERS
# =============================================================================

def truncate_summary(text: str, limit: int = MAX_SUMMARY_CHARS) -> str:
    """Trim *text* to *limit* chars, preferring the last full sentence."""
    text = (text or "").strip()
    if len(text) <= limit:
        return text
    window = text[:limit]
    ends = [m.end() for m in _SENTENCE_END.finditer(text[:limit + 1])]
    ends = [e for e in ends if e <= limit]
    if ends and ends[-1] >= MIN_SENTENCE_CUT:
        return text[:ends[-1]]
    return window[:limit - 1].rstrip() + "…"


def guess_district(address: str, city: str) -> Optional[str]:
    """Locality segment of *address* that is not the street or the city."""
    segments = [s.strip() for s in (address or "").split(",")]
    city_norm = (city or "").strip().lower()
    for segment in reversed(segments[1:]):
        candidate = _POSTCODE.sub("", segment).strip()
        if not candidate or candidate.isdigit():
            continue
        if candidate.lower() == city_norm:
            continue
        return candidate
    return None


def search_terms(city: str, address: Optional[str]) -> List[str]:
    city = (city or "").strip()
    terms = []
    district = guess_district(address or "", city)
    if district and city:
        terms.append(f"{district} {city}")
    if city:
        terms.append(city)
    return terms


# =============================================================================
# WIKIPEDIA CALLS
# =============================================================================

_HEADERS = {"User-Agent": NOMINATIM_USER_AGENT}


def _search_title(term: str) -> Optional[str]:
    params = {
        "action": "query",
        "list": "search",
        "srsearch": term,
        "srlimit": 1,
        "format": "json",
    }
    resp = fetch_with_retry(lambda: fetch(
        "GET", _SEARCH_URL, timeout=_WIKI_TIMEOUT, service="wikipedia",
        endpoint="search", params=params, headers=_HEADERS,
    ))
    if not resp.ok:
        return None
    hits = (resp.json().get("query") or {}).get("search") or []
    if not isinstance(hits, list) or not hits or not isinstance(hits[0], dict):
        return None
    return hits[0].get("title") or None


def _fetch_summary(title: str) -> Optional[AreaContext]:
    url = _SUMMARY_URL + quote(title.replace(" ", "_"), safe="")
    resp = fetch_with_retry(lambda: fetch(
        "GET", url, timeout=_WIKI_TIMEOUT, service="wikipedia",
        endpoint="summary", headers=_HEADERS,
    ))
    if not resp.ok:
        return None
    data = resp.json()
    extract = (data.get("extract") or "").strip()
    if len(extract) < MIN_SUMMARY_CHARS:
        return None
    page_url = (
        ((data.get("content_urls") or {}).get("desktop") or {}).get("page")
        or f"https://{WIKIPEDIA_LANG}.wikipedia.org/wiki/{quote(title.replace(' ', '_'))}"
    )
    return AreaContext(
        summary=truncate_summary(extract),
        title=data.get("title") or title,
        url=page_url,
    )


# =============================================================================
# PUBLIC API
# =============================================================================

def get_area_context(
    city: str,
    address: Optional[str] = None,
    cache: Optional[ExpiringCache] = None,
) -> Optional[AreaContext]:
    """Encyclopedic summary for the listing's district or city, or None."""
    terms = search_terms(city, address)
    if not terms:
        return None

    key = f"area:{(city or '').strip().lower()}|{(guess_district(address or '', city) or '').lower()}"
    if cache is not None:
        cached = cache.get(key)
        if cached is not None:
            record_cache_hit("wikipedia", "summary")
            return cached

    for term in terms:
        try:
            title = _search_title(term)
            context = _fetch_summary(title) if title else None
        except Exception:
            logger.info("Wikipedia lookup failed for %r", term, exc_info=True)
            continue
        if context is not None:
            if cache is not None:
                cache.set(key, context)
            return context

    logger.debug("No area context for %r / %r", city, address)
    return None


def serialize_for_result(context: Optional[AreaContext]) -> Optional[dict]:
    if context is None:
        return None
    return {"summary": context.summary, "title": context.title, "url": context.url}
