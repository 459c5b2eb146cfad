"""
Price context — where a listing's price sits among comparable listings.

Comparable = same city (case-insensitive), same listing type (sale/rent)
and the same primary category (first comma segment).  At least
MIN_COMPARABLES prices are needed; with fewer the context is None.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from listing_store import MAX_COMPARABLES, ListingStore

logger = logging.getLogger(__name__)

MIN_COMPARABLES = 2


@dataclass
class PriceContext:
    median_price: float
    count: int
    min_price: int
    max_price: int


def primary_category(category: str) -> str:
    first = (category or "").split(",")[0].strip()
    return first or (category or "").strip()


def median(values: List[float]) -> float:
    """Median of a non-empty list; mean of the two middle values when even."""
    ordered = sorted(values)
    n = len(ordered)
    mid = n // 2
    if n % 2:
        return ordered[mid]
    return (ordered[mid - 1] + ordered[mid]) / 2


def compute_price_context(prices: List[int]) -> Optional[PriceContext]:
    if len(prices) < MIN_COMPARABLES:
        return None
    ordered = sorted(prices)
    mid_value = median(ordered)
    if float(mid_value).is_integer():
        mid_value = int(mid_value)
    return PriceContext(
        median_price=mid_value,
        count=len(ordered),
        min_price=ordered[0],
        max_price=ordered[-1],
    )


def fetch_area_price_context(
    city: str, category: str, listing_type: str, store: ListingStore,
) -> Optional[PriceContext]:
    """PriceContext for comparable listings, or None."""
    if not city or not listing_type:
        return None
    try:
        prices = store.comparable_prices(
            city.strip(), listing_type, primary_category(category),
            limit=MAX_COMPARABLES,
        )
    except Exception:
        logger.warning("Comparable price query failed for %r", city, exc_info=True)
        return None
    return compute_price_context([p for p in prices if p is not None])


def serialize_for_result(context: Optional[PriceContext]) -> Optional[dict]:
    if context is None:
        return None
    return {
        "median_price": context.median_price,
        "count": context.count,
        "min_price": context.min_price,
        "max_price": context.max_price,
    }
