"""
Time-bounded outbound HTTP for every enrichment source.

fetch() performs a single request with a hard timeout and converts transport
failures into two distinct exception types:

  - FetchTimeoutError: the request did not complete within its time box
  - FetchNetworkError: connection refused, DNS failure, TLS error, ...

Non-2xx responses are returned to the caller untouched.  Enrichment
components treat them as a soft failure and return their default value, so
they are never retried.

fetch_with_retry() re-invokes a callable on any exception with linear
backoff (attempt * backoff_seconds) and re-raises the last error once the
attempts are exhausted.  Calls made inside the loop are traced with their
attempt number.

Each request uses a fresh requests.Session so fan-out threads never share
connection state.
"""

import logging
import threading
import time
from typing import Callable, Optional, TypeVar

import requests

from hy_trace import record_api

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TIMEOUT = 5  # seconds
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_SECONDS = 1.0

# Attempt number of the fetch_with_retry loop running on this thread.
_retry_state = threading.local()


class FetchError(Exception):
    """Base class for transport-level failures (no HTTP response)."""


class FetchTimeoutError(FetchError):
    """The request exceeded its time box and was aborted."""


class FetchNetworkError(FetchError):
    """The request failed before a response was received."""


def current_attempt() -> int:
    return getattr(_retry_state, "attempt", 1)


def fetch(
    method: str,
    url: str,
    timeout: float = DEFAULT_TIMEOUT,
    service: str = "http",
    endpoint: str = "",
    **kwargs,
) -> requests.Response:
    """Issue one HTTP request bounded by *timeout* seconds.

    Extra keyword arguments go straight to ``requests.Session.request``
    (params, data, json, headers).  Returns the response for any status
    code; raises FetchTimeoutError / FetchNetworkError otherwise.
    """
    endpoint = endpoint or url
    attempt = current_attempt()
    t0 = time.monotonic()
    session = requests.Session()
    session.trust_env = False
    try:
        resp = session.request(method, url, timeout=timeout, **kwargs)
    except requests.exceptions.Timeout as exc:
        record_api(service, endpoint, t0, 0, "timeout", attempt=attempt)
        raise FetchTimeoutError(
            f"{service} request timed out after {timeout}s [{endpoint}]"
        ) from exc
    except requests.exceptions.RequestException as exc:
        record_api(service, endpoint, t0, 0, "network_error", attempt=attempt)
        raise FetchNetworkError(
            f"{service} request failed: {exc} [{endpoint}]"
        ) from exc
    finally:
        session.close()

    record_api(service, endpoint, t0, resp.status_code,
               "OK" if resp.ok else "http_error", attempt=attempt)
    return resp


def fetch_with_retry(
    fn: Callable[[], T],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
    sleep: Optional[Callable[[float], None]] = None,
) -> T:
    """Call *fn* until it returns without raising, at most *max_attempts* times.

    Waits ``attempt * backoff_seconds`` between attempts.  The final
    exception propagates unchanged.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")
    sleep = sleep or time.sleep

    outer = getattr(_retry_state, "attempt", None)
    try:
        for attempt in range(1, max_attempts + 1):
            _retry_state.attempt = attempt
            try:
                return fn()
            except Exception as exc:
                if attempt >= max_attempts:
                    raise
                delay = attempt * backoff_seconds
                logger.info(
                    "Attempt %d/%d failed (%s), retrying in %.1fs",
                    attempt, max_attempts, exc, delay,
                )
                sleep(delay)
    finally:
        if outer is None:
            del _retry_state.attempt
        else:
            _retry_state.attempt = outer
    raise AssertionError("unreachable")
