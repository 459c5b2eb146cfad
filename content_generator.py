"""
AI listing copy — prompt assembly and a cascading generation strategy list.

build_prompt() turns the listing facts and every enrichment result into
the user message.  Sections without data are left out; when no amenity data
exists the model is told not to mention specific counts.

generate_listing_copy() walks an ordered list of strategies and returns
the first schema-valid result:

  1. VisionSchemaStrategy  — images + text, strict JSON schema
     (only when every image URL is on a public host)
  2. TextSchemaStrategy    — text only, strict JSON schema
  3. ChatJsonStrategy      — chat completion in JSON-object mode,
     parsed manually

A raised error, an empty response or a schema violation moves on to the
next strategy; a strategy is never retried.  When all fail,
ListingGenerationError carries a fixed user-facing message.  The provider
error is logged but not chained, so it never reaches the user.
"""

import ipaddress
import json
import logging
import os
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence
from urllib.parse import urlparse

import sentry_sdk
from openai import OpenAI

from area_context import AreaContext
from hy_trace import record_api
from municipal_reference import is_below_national_crime_rate
from municipal_stats import DemographicsData
from nearby_amenities import POI_RADIUS_M, NearbyData
from price_context import PriceContext
from walkability import WalkabilityData

if TYPE_CHECKING:
    from listing_pipeline import GenerateInput

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

AI_TIMEOUT = 30.0  # seconds, per strategy

MODEL_VISION = os.environ.get("LISTING_MODEL_VISION", "gpt-4.1")
MODEL_TEXT = os.environ.get("LISTING_MODEL_TEXT", "gpt-4.1-mini")
MODEL_CHAT = os.environ.get("LISTING_MODEL_CHAT", "gpt-4o")
CHAT_MAX_TOKENS = 1500
MAX_VISION_IMAGES = 6

TITLE_MAX_CHARS = 200
TITLE_DISPLAY_CHARS = 120
DESCRIPTION_MAX_CHARS = 5000
MAX_TAGS = 20
TAG_MAX_CHARS = 50

USER_MESSAGE = "Kunde inte generera annons – alla modeller misslyckades"

SAFE_AREA_TAG = "Tryggt område"

ALLOWED_TAGS = (
    "Nyrenoverad", "Centralt läge", "Hög takhöjd", "Parkering", "Fiber",
    "Klimatanläggning", "Lastbrygga", "Skyltfönster", "Öppen planlösning",
    "Mötesrum", "Nära kollektivtrafik", SAFE_AREA_TAG,
)

SYSTEM_PROMPT = f"""Du skriver annonser för kommersiella lokaler i Sverige och har lång erfarenhet av fastighetsmarknaden. Annonsen ska få rätt hyresgäst eller köpare att vilja boka visning.

Svara ENDAST med ett JSON-objekt, utan markdown. Nycklar:
- "title": sträng, högst 80 tecken. Inled med lokalens starkaste egenskap och orten.
- "description": sträng, 200–400 ord i fyra stycken: (1) en inledande mening som fångar det mest unika, (2) lokalen: storlek, planlösning, skick, utrustning, (3) läget: väv in områdesdata i löpande text, inte som punktlista, (4) avslutning: vem passar lokalen för och varför nu.
- "tags": array med högst 10 strängar, endast ur: {", ".join(ALLOWED_TAGS)}.

REGLER:
- Skriv som en människa, professionellt men engagerande.
- Undvik klichéer som "unik möjlighet", "perfekt för", "missa inte", "i hjärtat av".
- Använd bara siffror som finns i underlaget. Hitta aldrig på antal, avstånd eller statistik.
- Nämn pris och storlek naturligt i beskrivningen.
- Taggen "{SAFE_AREA_TAG}" får bara användas om underlaget uttryckligen tillåter det."""

LISTING_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "title": {"type": "string"},
        "description": {"type": "string"},
        "tags": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["title", "description", "tags"],
    "additionalProperties": False,
}

NO_AMENITY_INSTRUCTION = (
    "Närliggande faciliteter: uppgifter saknas. Nämn inga specifika antal "
    "restauranger, butiker, hållplatser eller andra faciliteter."
)

TYPE_LABELS = {"sale": "till salu", "rent": "uthyres"}

CATEGORY_LABELS = {
    "butik": "butik",
    "kontor": "kontor",
    "lager": "lager",
    "restaurang": "restaurang/café",
    "verkstad": "verkstad/industri",
    "showroom": "showroom",
    "popup": "pop-up",
    "atelje": "ateljé/studio",
    "gym": "gym/träningslokal",
    "ovrigt": "övrigt",
}


class ListingGenerationError(RuntimeError):
    """Every generation strategy failed.  str(exc) is safe to show users."""

    def __init__(self, message: str = USER_MESSAGE):
        super().__init__(message)


@dataclass
class GenerationRequest:
    prompt: str
    system: str = SYSTEM_PROMPT
    images: List[str] = field(default_factory=list)


@dataclass
class ListingCopy:
    title: str
    description: str
    tags: List[str]


# =============================================================================
# PROMPT ASSEMBLY
# =============================================================================

def format_number(value: float) -> str:
    """Swedish thousands grouping: 1234567 -> '1 234 567', 66.5 -> '66,5'."""
    if float(value).is_integer():
        return f"{int(value):,}".replace(",", " ")
    return f"{value:,.1f}".replace(",", " ").replace(".", ",")


def _price_text(price: float, listing_type: str) -> str:
    suffix = "/mån" if listing_type == "rent" else ""
    return f"{format_number(price)} kr{suffix}"


def _demographics_line(demo: DemographicsData) -> str:
    parts = [f"{demo.city} har cirka {format_number(demo.population)} invånare."]
    if demo.median_income is not None:
        parts.append(f"Medianinkomst {format_number(demo.median_income)} tkr/år.")
    if demo.working_age_percent is not None:
        parts.append(f"{format_number(demo.working_age_percent)} % i arbetsför ålder.")
    if demo.total_businesses is not None:
        parts.append(f"{format_number(demo.total_businesses)} arbetsställen.")
    if demo.crime_rate is not None:
        parts.append(
            f"{format_number(demo.crime_rate)} anmälda brott per 100 000 invånare."
        )
    if is_below_national_crime_rate(demo.crime_rate):
        parts.append(
            f'Brottsligheten ligger under riksgenomsnittet; taggen "{SAFE_AREA_TAG}" får användas.'
        )
    return "Demografi: " + " ".join(parts)


def _nearby_line(nearby: NearbyData) -> str:
    counts = [
        (nearby.restaurants, "restauranger/caféer"),
        (nearby.shops, "butiker"),
        (nearby.gyms, "gym"),
        (nearby.parking, "parkeringar"),
        (nearby.schools, "skolor"),
        (nearby.healthcare, "vårdinrättningar/apotek"),
        (nearby.bus_stops.count, "busshållplatser"),
        (nearby.train_stations.count, "tågstationer"),
    ]
    parts = [f"{n} {label}" for n, label in counts if n > 0]
    line = f"Närliggande faciliteter (inom cirka {format_number(POI_RADIUS_M / 1000)} km): " + ", ".join(parts) + "."
    for summary, label in ((nearby.bus_stops, "busshållplats"),
                           (nearby.train_stations, "tågstation")):
        if summary.count > 0 and summary.nearest_name:
            line += (
                f" Närmaste {label}: {summary.nearest_name}"
                f" ({format_number(round(summary.nearest_distance_m))} m)."
            )
    return line


def _walkability_line(walk: WalkabilityData) -> str:
    return (
        f"Gång- och cykelvänlighet: gång {walk.walk_score}/100 ({walk.walk_label}), "
        f"cykel {walk.bike_score}/100 ({walk.bike_label})."
    )


def _price_context_line(ctx: PriceContext, city: str, listing_type: str) -> str:
    return (
        f"Prisjämförelse: {ctx.count} liknande annonser i {city}, median "
        f"{_price_text(ctx.median_price, listing_type)} "
        f"(spann {_price_text(ctx.min_price, listing_type)}–"
        f"{_price_text(ctx.max_price, listing_type)})."
    )


def build_prompt(
    listing: "GenerateInput",
    city: str,
    display_name: Optional[str] = None,
    nearby: Optional[NearbyData] = None,
    walkability: Optional[WalkabilityData] = None,
    demographics: Optional[DemographicsData] = None,
    price_context: Optional[PriceContext] = None,
    area_context: Optional[AreaContext] = None,
) -> str:
    """User message for the model; sections without data are omitted."""
    lines = [
        f"Adress: {listing.address.strip()}",
        f"Typ: {TYPE_LABELS.get(listing.type, listing.type)}",
        f"Kategori: {CATEGORY_LABELS.get(listing.category, listing.category)}",
        f"Pris: {_price_text(listing.price, listing.type)}",
        f"Storlek: {format_number(listing.size)} m²",
    ]
    if listing.highlights and listing.highlights.strip():
        lines.append(f"Det hyresvärden vill lyfta: {listing.highlights.strip()}")
    if display_name:
        lines.append(f"Plats: {display_name}")
    if demographics is not None:
        lines.append(_demographics_line(demographics))

    if nearby is None or nearby.is_empty:
        lines.append(NO_AMENITY_INSTRUCTION)
    else:
        lines.append(_nearby_line(nearby))

    if walkability is not None and (walkability.walk_score or walkability.bike_score):
        lines.append(_walkability_line(walkability))
    if price_context is not None:
        lines.append(_price_context_line(price_context, city, listing.type))
    if area_context is not None:
        lines.append(f"Om området ({area_context.title}): {area_context.summary}")
    return "\n".join(lines)


# =============================================================================
# OUTPUT VALIDATION
# =============================================================================

def _extract_json_object(text: str) -> str:
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        raise ValueError("No JSON object found in model output")
    return text[start:end + 1]


def parse_listing_payload(raw: Optional[str], lenient: bool = False) -> Dict[str, Any]:
    """Parse and validate model output against LISTING_SCHEMA.

    With *lenient*, surrounding prose or code fences are tolerated.
    Raises ValueError on empty output or any schema violation.
    """
    text = (raw or "").strip()
    if not text:
        raise ValueError("Empty model response")
    if lenient:
        text = _extract_json_object(text)
    payload = json.loads(text)

    if not isinstance(payload, dict):
        raise ValueError("Model output is not a JSON object")
    title = payload.get("title")
    description = payload.get("description")
    tags = payload.get("tags")
    if not isinstance(title, str) or not title.strip():
        raise ValueError("title missing or not a non-empty string")
    if not isinstance(description, str) or not description.strip():
        raise ValueError("description missing or not a non-empty string")
    if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
        raise ValueError("tags must be an array of strings")
    return payload


def finalize_copy(payload: Dict[str, Any]) -> ListingCopy:
    """Trim and length-cap a validated payload."""
    title = payload["title"].strip()[:TITLE_MAX_CHARS].strip()
    if len(title) > TITLE_DISPLAY_CHARS:
        cut = title[:TITLE_DISPLAY_CHARS]
        space = cut.rfind(" ")
        title = (cut[:space] if space > TITLE_DISPLAY_CHARS // 2 else cut).rstrip(" ,–-")
    description = payload["description"].strip()[:DESCRIPTION_MAX_CHARS].strip()
    tags = []
    for tag in payload["tags"]:
        tag = tag.strip()[:TAG_MAX_CHARS].strip()
        if tag:
            tags.append(tag)
    return ListingCopy(title=title, description=description, tags=tags[:MAX_TAGS])


# =============================================================================
# STRATEGIES
# =============================================================================

def is_public_image_url(url: str) -> bool:
    """True when *url* is http(s) on a host the AI provider can reach."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        return False
    host = parsed.hostname.lower()
    if host == "localhost" or host.endswith((".local", ".internal", ".localhost")):
        return False
    try:
        return ipaddress.ip_address(host).is_global
    except ValueError:
        return "." in host


class GenerationStrategy:
    """One way of asking the model for listing copy."""

    name = "base"
    lenient_parse = False

    def __init__(self, model: str):
        self.model = model

    def is_applicable(self, request: GenerationRequest) -> bool:
        return True

    def attempt(self, client: OpenAI, request: GenerationRequest) -> str:
        raise NotImplementedError

    def __repr__(self):
        return f"{type(self).__name__}(model={self.model!r})"


def _schema_format(name: str) -> Dict[str, Any]:
    return {
        "format": {
            "type": "json_schema",
            "name": name,
            "strict": True,
            "schema": LISTING_SCHEMA,
        }
    }


class VisionSchemaStrategy(GenerationStrategy):
    name = "vision_schema"

    def is_applicable(self, request: GenerationRequest) -> bool:
        return bool(request.images) and all(
            is_public_image_url(u) for u in request.images
        )

    def attempt(self, client: OpenAI, request: GenerationRequest) -> str:
        content: List[Dict[str, Any]] = [{"type": "input_text", "text": request.prompt}]
        for url in request.images[:MAX_VISION_IMAGES]:
            content.append({"type": "input_image", "image_url": url, "detail": "low"})
        response = client.responses.create(
            model=self.model,
            instructions=request.system,
            input=[{"role": "user", "content": content}],
            text=_schema_format("listing_vision"),
        )
        return response.output_text or ""


class TextSchemaStrategy(GenerationStrategy):
    name = "text_schema"

    def attempt(self, client: OpenAI, request: GenerationRequest) -> str:
        response = client.responses.create(
            model=self.model,
            instructions=request.system,
            input=request.prompt,
            text=_schema_format("listing"),
        )
        return response.output_text or ""


class ChatJsonStrategy(GenerationStrategy):
    name = "chat_json"
    lenient_parse = True

    def attempt(self, client: OpenAI, request: GenerationRequest) -> str:
        completion = client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": request.system},
                {"role": "user", "content": request.prompt},
            ],
            response_format={"type": "json_object"},
            max_tokens=CHAT_MAX_TOKENS,
        )
        if not completion.choices:
            return ""
        return completion.choices[0].message.content or ""


def default_strategies() -> List[GenerationStrategy]:
    return [
        VisionSchemaStrategy(MODEL_VISION),
        TextSchemaStrategy(MODEL_TEXT),
        ChatJsonStrategy(MODEL_CHAT),
    ]


def create_client(api_key: str) -> OpenAI:
    """OpenAI client with a per-call timeout and no SDK-level retries."""
    key = (api_key or "").strip()
    if not key:
        raise ValueError("AI API key is not set")
    return OpenAI(api_key=key, timeout=AI_TIMEOUT, max_retries=0)


# =============================================================================
# CASCADE
# =============================================================================

def generate_listing_copy(
    client: OpenAI,
    request: GenerationRequest,
    strategies: Optional[Sequence[GenerationStrategy]] = None,
) -> ListingCopy:
    """Return copy from the first strategy that yields schema-valid output.

    Raises ListingGenerationError when every applicable strategy fails.
    """
    if strategies is None:
        strategies = default_strategies()
    last_error: Optional[Exception] = None

    for strategy in strategies:
        if not strategy.is_applicable(request):
            logger.debug("[generate] Skipping %s: not applicable", strategy.name)
            continue
        logger.info("[generate] Trying %s (%s)", strategy.name, strategy.model)
        t0 = time.monotonic()
        try:
            raw = strategy.attempt(client, request)
            payload = parse_listing_payload(raw, lenient=strategy.lenient_parse)
        except Exception as exc:
            last_error = exc
            record_api("openai", strategy.name, t0, 0, type(exc).__name__)
            logger.warning("[generate] %s failed: %s", strategy.name, exc)
            continue

        record_api("openai", strategy.name, t0, 200, "OK")
        logger.info("[generate] %s succeeded", strategy.name)
        return finalize_copy(payload)

    logger.error(
        "[generate] All strategies failed. Last error: %s", last_error,
        exc_info=last_error,
    )
    if last_error is not None:
        sentry_sdk.capture_exception(last_error)
    raise ListingGenerationError()
