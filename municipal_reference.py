"""
Static municipal reference data for demographic context.

Owns the city-name → municipality-code table and the per-municipality
reference figures that the live SCB population query does not cover:
median income, working-age share, registered businesses and reported
crime rate.

Frozen dataclasses and read-only mappings keep the tables immutable.
Lookups go through typed accessors that return NOT_FOUND instead of None,
so each fallback is an explicit branch at the call site.

Figures are snapshot values (median income in tkr/year for ages 20-64,
working-age share = ages 20-64, businesses = registered workplaces,
crime rate = reported offences per 100 000 residents).
"""

import re
import unicodedata
from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping, Optional, Union


# =============================================================================
# Municipality codes
# =============================================================================

# Code used when a city is not in the table.  The statistics service has
# no such region, so population lookups for it fail.
UNMAPPED_CODE = "00"

# Normalized city name (lowercase, no diacritics) → 4-digit kommun code.
MUNICIPALITY_CODES: Mapping[str, str] = MappingProxyType({
    "stockholm": "0180",
    "goteborg": "1480",
    "malmo": "1280",
    "uppsala": "0380",
    "vasteras": "1980",
    "orebro": "1880",
    "linkoping": "0580",
    "helsingborg": "1283",
    "norrkoping": "0581",
    "jonkoping": "0680",
    "umea": "2480",
    "lund": "1281",
    "boras": "1490",
    "sundsvall": "2281",
    "gavle": "2180",
    "eskilstuna": "0484",
    "sodertalje": "0181",
    "karlstad": "1780",
    "taby": "0160",
    "vaxjo": "0780",
    "halmstad": "1380",
    "lulea": "2580",
    "trollhattan": "1488",
    "ostersund": "2380",
    "borlange": "2081",
    "falun": "2080",
    "kalmar": "0880",
    "kristianstad": "1290",
    "skovde": "1496",
    "uddevalla": "1485",
    "varberg": "1383",
    "nykoping": "0482",
    "landskrona": "1282",
    "motala": "0583",
    "lidkoping": "1494",
    "visby": "0980",
    "gotland": "0980",
})


# =============================================================================
# Reference figures
# =============================================================================

@dataclass(frozen=True)
class MunicipalProfile:
    median_income: int          # tkr/year
    working_age_percent: float  # share of residents aged 20-64
    total_businesses: int


# Reported offences per 100 000 residents, national level.  Also the
# threshold for the "safe area" hint in listing copy.
NATIONAL_CRIME_RATE = 14_000

MUNICIPAL_PROFILES: Mapping[str, MunicipalProfile] = MappingProxyType({
    "0180": MunicipalProfile(372, 66.5, 136_000),
    "1480": MunicipalProfile(330, 66.0, 68_000),
    "1280": MunicipalProfile(290, 65.3, 40_000),
    "0380": MunicipalProfile(335, 64.0, 26_000),
    "1980": MunicipalProfile(330, 61.4, 14_500),
    "1880": MunicipalProfile(320, 62.0, 14_000),
    "0580": MunicipalProfile(335, 62.5, 16_500),
    "1283": MunicipalProfile(315, 60.6, 15_500),
    "0581": MunicipalProfile(305, 60.5, 12_000),
    "0680": MunicipalProfile(325, 60.7, 14_000),
    "2480": MunicipalProfile(320, 63.8, 12_500),
    "1281": MunicipalProfile(330, 66.8, 13_000),
    "1490": MunicipalProfile(315, 59.5, 12_000),
    "2281": MunicipalProfile(325, 59.6, 9_000),
    "2180": MunicipalProfile(310, 60.4, 8_500),
    "0484": MunicipalProfile(295, 59.3, 8_000),
    "0181": MunicipalProfile(290, 60.8, 8_200),
    "1780": MunicipalProfile(315, 61.1, 9_000),
    "0160": MunicipalProfile(420, 56.9, 9_500),
    "0780": MunicipalProfile(320, 61.5, 9_500),
    "1380": MunicipalProfile(315, 58.9, 10_500),
    "2580": MunicipalProfile(345, 61.2, 6_500),
    "1488": MunicipalProfile(305, 59.4, 4_700),
    "2380": MunicipalProfile(310, 59.6, 6_800),
    "2081": MunicipalProfile(305, 59.3, 4_300),
    "2080": MunicipalProfile(320, 58.5, 5_800),
    "0880": MunicipalProfile(315, 59.7, 6_800),
    "1290": MunicipalProfile(305, 58.6, 8_000),
    "1496": MunicipalProfile(315, 60.0, 4_800),
    "1485": MunicipalProfile(305, 58.2, 5_000),
    "1383": MunicipalProfile(330, 56.8, 7_500),
    "0482": MunicipalProfile(315, 57.4, 5_000),
    "1282": MunicipalProfile(280, 58.8, 3_000),
    "0583": MunicipalProfile(295, 57.2, 3_000),
    "1494": MunicipalProfile(310, 57.0, 3_800),
    "0980": MunicipalProfile(300, 57.5, 7_900),
})

# Not every municipality has a published per-capita figure in the same
# vintage; missing codes fall back to NATIONAL_CRIME_RATE.
CRIME_RATES: Mapping[str, int] = MappingProxyType({
    "0180": 21_600,
    "1480": 18_900,
    "1280": 20_600,
    "0380": 13_900,
    "1980": 13_200,
    "1880": 14_800,
    "0580": 12_600,
    "1283": 15_300,
    "0581": 14_600,
    "0680": 11_500,
    "2480": 11_000,
    "1281": 12_400,
    "1490": 12_900,
    "2281": 12_100,
    "2180": 14_100,
    "0484": 15_700,
    "0181": 17_400,
    "1780": 12_700,
    "0160": 9_000,
    "0780": 11_700,
    "1380": 11_900,
    "2580": 10_300,
})


# =============================================================================
# Typed accessors
# =============================================================================

class _NotFound:
    """Explicit "no entry" result from a reference-table lookup."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self):
        return False

    def __repr__(self):
        return "NOT_FOUND"


NOT_FOUND = _NotFound()


@dataclass(frozen=True)
class CrimeRate:
    per_100k: int
    is_national_average: bool


def normalize_city(name: str) -> str:
    """Lowercase, strip diacritics and a trailing " kommun"."""
    decomposed = unicodedata.normalize("NFD", (name or "").lower())
    stripped = "".join(c for c in decomposed if not unicodedata.combining(c))
    stripped = re.sub(r"\s+kommun$", "", stripped.strip())
    return re.sub(r"\s+", " ", stripped)


def municipality_code(city: str) -> str:
    """Kommun code for *city*, or UNMAPPED_CODE."""
    return MUNICIPALITY_CODES.get(normalize_city(city), UNMAPPED_CODE)


def lookup_profile(code: str) -> Union[MunicipalProfile, _NotFound]:
    return MUNICIPAL_PROFILES.get(code, NOT_FOUND)


def lookup_crime_rate(code: str) -> CrimeRate:
    """Per-municipality crime rate, falling back to the national average."""
    rate: Optional[int] = CRIME_RATES.get(code)
    if rate is None:
        return CrimeRate(NATIONAL_CRIME_RATE, is_national_average=True)
    return CrimeRate(rate, is_national_average=False)


def is_below_national_crime_rate(crime_rate: Optional[int]) -> bool:
    return crime_rate is not None and crime_rate < NATIONAL_CRIME_RATE
