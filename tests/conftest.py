"""Shared fixtures for the listing enrichment test suite.

Every network-facing module is exercised with mocked HTTP; nothing in the
suite talks to Nominatim, Overpass, SCB, Wikipedia or OpenAI.
"""

import os
import sys
from unittest.mock import MagicMock

import pytest
import requests

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# No client-side spacing between mocked Overpass calls.
os.environ.setdefault("OVERPASS_MIN_SPACING", "0")

from expiring_cache import ExpiringCache  # noqa: E402
from hy_trace import clear_trace  # noqa: E402


class FakeClock:
    """Manually advanced clock for ExpiringCache tests."""

    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def mock_response(status_code=200, json_data=None, text=""):
    """Create a mock requests.Response object."""
    resp = MagicMock(spec=requests.Response)
    resp.status_code = status_code
    resp.ok = 200 <= status_code < 300
    resp.text = text
    if json_data is not None:
        resp.json.return_value = json_data
    else:
        resp.json.side_effect = ValueError("No JSON")
    return resp


@pytest.fixture(autouse=True)
def _no_trace_leak():
    clear_trace()
    yield
    clear_trace()


@pytest.fixture(autouse=True)
def _no_retry_sleep(monkeypatch):
    """Retries back off instantly in tests."""
    monkeypatch.setattr("http_fetch.time.sleep", lambda s: None)


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def cache(clock):
    return ExpiringCache(clock=clock)
