"""
Coordinated Overpass API HTTP layer.

All Overpass queries (nearby amenities, walkability infrastructure) go
through this module.  It provides:
- Process-local request spacing (OVERPASS_MIN_SPACING seconds, default 1)
- Time-boxed POSTs via http_fetch, retried with linear backoff on
  transport errors, 429, 5xx and server-side errors reported in the body
- No retry on other 4xx responses (a malformed query will not improve)

Response caching is done by the callers, keyed on rounded coordinates,
through an injected ExpiringCache.

When self-hosting Overpass, set OVERPASS_BASE_URL and OVERPASS_MIN_SPACING=0.
"""

import logging
import os
import threading
import time
from typing import Any, Callable, Dict, Optional

from http_fetch import DEFAULT_MAX_ATTEMPTS, fetch, fetch_with_retry

logger = logging.getLogger(__name__)


class OverpassRateLimitError(Exception):
    """Overpass returned 429 or a rate-limit remark."""


class OverpassQueryError(Exception):
    """Overpass returned an error status or an unusable body."""


_BODY_ERROR_INDICATORS = ("runtime error", "timed out", "out of memory")


class OverpassHTTPClient:
    DEFAULT_TIMEOUT = 12  # seconds

    def __init__(
        self,
        base_url: Optional[str] = None,
        min_spacing: Optional[float] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.base_url = base_url or os.environ.get(
            "OVERPASS_BASE_URL", "https://overpass-api.de/api/interpreter",
        )
        if min_spacing is None:
            min_spacing = float(os.environ.get("OVERPASS_MIN_SPACING", "1.0"))
        self.min_spacing = min_spacing
        self.max_attempts = max_attempts
        self._sleep = sleep
        self._lock = threading.Lock()
        self._last_request_time = 0.0

    def query(
        self,
        overpass_ql: str,
        caller: str = "unknown",
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Execute an Overpass QL query and return the parsed JSON body.

        Raises:
            OverpassRateLimitError: still rate limited after all attempts.
            OverpassQueryError: non-retryable HTTP error, or server errors
                persisting after all attempts.
            http_fetch.FetchError: transport failure after all attempts.
        """
        if timeout is None:
            timeout = self.DEFAULT_TIMEOUT

        resp, data = fetch_with_retry(
            lambda: self._do_request(overpass_ql, caller, timeout),
            max_attempts=self.max_attempts,
            sleep=self._sleep,
        )
        if data is None:
            raise OverpassQueryError(
                f"Overpass HTTP {resp.status_code} [caller={caller}]"
            )
        return data

    def _wait_for_slot(self):
        with self._lock:
            elapsed = time.monotonic() - self._last_request_time
            if elapsed < self.min_spacing:
                self._sleep(self.min_spacing - elapsed)
            self._last_request_time = time.monotonic()

    def _do_request(self, overpass_ql: str, caller: str, timeout: float):
        """One POST.  Returns (response, data); data is None for a 4xx.

        Raises on everything worth retrying.
        """
        self._wait_for_slot()
        resp = fetch(
            "POST",
            self.base_url,
            timeout=timeout,
            service="overpass",
            endpoint=caller,
            data={"data": overpass_ql},
        )
        status = resp.status_code
        if status == 429:
            raise OverpassRateLimitError(
                f"Overpass 429 Too Many Requests [caller={caller}]"
            )
        if status >= 500:
            raise OverpassQueryError(
                f"Overpass HTTP {status} [caller={caller}]"
            )
        if status >= 400:
            return resp, None

        try:
            data = resp.json()
        except ValueError:
            raise OverpassQueryError(
                f"Overpass returned non-JSON response (HTTP {status}) [caller={caller}]"
            )
        if not isinstance(data, dict):
            raise OverpassQueryError(
                f"Overpass returned unexpected JSON type [caller={caller}]"
            )

        # Overpass reports server-side failures in a remark with HTTP 200.
        osm3s = data.get("osm3s") or {}
        remark = str(osm3s.get("remark") or data.get("remark") or "").lower()
        if "too many requests" in remark:
            raise OverpassRateLimitError(
                f"Overpass rate limit in response body [caller={caller}]"
            )
        if any(indicator in remark for indicator in _BODY_ERROR_INDICATORS):
            raise OverpassQueryError(
                f"Overpass server error in response body: {remark[:100]} [caller={caller}]"
            )
        return resp, data


# Module-level client shared by all callers in this process.
_client = OverpassHTTPClient()


def overpass_query(
    overpass_ql: str,
    caller: str = "unknown",
    timeout: Optional[float] = None,
) -> Dict[str, Any]:
    """Module-level convenience function.  All Overpass calls should use this."""
    return _client.query(overpass_ql, caller=caller, timeout=timeout)


def element_coords(element: Dict[str, Any]):
    """(lat, lng) of a node, or of a way/relation's ``out center`` point."""
    if "lat" in element and "lon" in element:
        return element["lat"], element["lon"]
    center = element.get("center") or {}
    if "lat" in center and "lon" in center:
        return center["lat"], center["lon"]
    return None
