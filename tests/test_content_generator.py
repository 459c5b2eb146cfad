"""Unit tests for content_generator.py — prompt assembly, validation and the
strategy cascade.  The OpenAI client is always a MagicMock."""

import json
from unittest.mock import MagicMock, patch

import pytest

from area_context import AreaContext
from content_generator import (
    NO_AMENITY_INSTRUCTION,
    SAFE_AREA_TAG,
    USER_MESSAGE,
    ChatJsonStrategy,
    GenerationRequest,
    GenerationStrategy,
    ListingGenerationError,
    TextSchemaStrategy,
    VisionSchemaStrategy,
    build_prompt,
    create_client,
    finalize_copy,
    format_number,
    generate_listing_copy,
    is_public_image_url,
    parse_listing_payload,
)
from listing_pipeline import GenerateInput
from municipal_stats import DemographicsData
from nearby_amenities import NearbyData, TransitSummary
from price_context import PriceContext
from walkability import WalkabilityData

VALID = {"title": "Ljust kontor vid Odenplan", "description": "Fin lokal.", "tags": ["Fiber"]}


def _listing(**overrides):
    fields = dict(address="Götgatan 12, Stockholm", type="rent", category="kontor",
                  price=15000, size=120)
    fields.update(overrides)
    return GenerateInput(**fields)


class _Fixed(GenerationStrategy):
    """Strategy returning canned output (or raising it)."""

    def __init__(self, name, output):
        super().__init__(model="test-model")
        self.name = name
        self.output = output
        self.calls = 0

    def attempt(self, client, request):
        self.calls += 1
        if isinstance(self.output, Exception):
            raise self.output
        return self.output


# =========================================================================
# Prompt assembly
# =========================================================================

class TestFormatNumber:
    def test_grouping(self):
        assert format_number(984748) == "984 748"
        assert format_number(66.5) == "66,5"
        assert format_number(12500.0) == "12 500"


class TestBuildPrompt:
    def test_minimal_prompt_has_facts_and_no_amenity_instruction(self):
        prompt = build_prompt(_listing(), "Stockholm")
        assert "Adress: Götgatan 12, Stockholm" in prompt
        assert "Pris: 15 000 kr/mån" in prompt
        assert "Storlek: 120 m²" in prompt
        assert NO_AMENITY_INSTRUCTION in prompt
        assert "Demografi" not in prompt
        assert "Prisjämförelse" not in prompt
        assert "Om området" not in prompt

    def test_all_zero_nearby_adds_no_counts_instruction(self):
        prompt = build_prompt(_listing(), "Stockholm", nearby=NearbyData(),
                              walkability=WalkabilityData())
        assert NO_AMENITY_INSTRUCTION in prompt
        assert "Gång- och cykelvänlighet" not in prompt

    def test_full_enrichment(self):
        nearby = NearbyData(
            restaurants=12, shops=8,
            bus_stops=TransitSummary(count=3, nearest_name="Odenplan", nearest_distance_m=180),
        )
        prompt = build_prompt(
            _listing(highlights="Takterrass"), "Stockholm",
            display_name="Götgatan 12, Södermalm, Stockholm",
            nearby=nearby,
            walkability=WalkabilityData(walk_score=78, bike_score=55,
                                        walk_label="Very good", bike_label="Good"),
            demographics=DemographicsData(population=984748, city="Stockholm",
                                          median_income=372, crime_rate=21600),
            price_context=PriceContext(median_price=14000, count=6,
                                       min_price=9000, max_price=21000),
            area_context=AreaContext(summary="Södermalm är en stadsdel.",
                                     title="Södermalm", url="u"),
        )
        assert NO_AMENITY_INSTRUCTION not in prompt
        assert "12 restauranger/caféer" in prompt
        assert "Närmaste busshållplats: Odenplan (180 m)" in prompt
        assert "gång 78/100 (Very good)" in prompt
        assert "984 748 invånare" in prompt
        assert "6 liknande annonser i Stockholm" in prompt
        assert "Om området (Södermalm): Södermalm är en stadsdel." in prompt
        assert "Det hyresvärden vill lyfta: Takterrass" in prompt
        assert "Plats: Götgatan 12, Södermalm, Stockholm" in prompt
        # Stockholm is above the national crime rate
        assert "riksgenomsnittet" not in prompt

    def test_safe_area_hint_below_national_crime_rate(self):
        demo = DemographicsData(population=75000, city="Täby", crime_rate=9000)
        prompt = build_prompt(_listing(), "Täby", demographics=demo)
        assert "riksgenomsnittet" in prompt
        assert SAFE_AREA_TAG in prompt

    def test_sale_price_has_no_monthly_suffix(self):
        prompt = build_prompt(_listing(type="sale", price=4500000), "Stockholm")
        assert "Pris: 4 500 000 kr" in prompt
        assert "kr/mån" not in prompt


# =========================================================================
# Output validation
# =========================================================================

class TestParseListingPayload:
    def test_valid(self):
        assert parse_listing_payload(json.dumps(VALID)) == VALID

    @pytest.mark.parametrize("payload", [
        {"title": "", "description": "d", "tags": []},
        {"title": "t", "description": "   ", "tags": []},
        {"title": "t", "description": "d", "tags": "Fiber"},
        {"title": "t", "description": "d", "tags": [1, 2]},
        {"title": 5, "description": "d", "tags": []},
        {"description": "d", "tags": []},
    ])
    def test_schema_violations(self, payload):
        with pytest.raises(ValueError):
            parse_listing_payload(json.dumps(payload))

    def test_empty_output(self):
        with pytest.raises(ValueError):
            parse_listing_payload("")
        with pytest.raises(ValueError):
            parse_listing_payload(None)

    def test_lenient_extracts_object_from_fences(self):
        raw = "Här är annonsen:\n```json\n" + json.dumps(VALID) + "\n```"
        assert parse_listing_payload(raw, lenient=True) == VALID
        with pytest.raises(ValueError):
            parse_listing_payload(raw)

    def test_non_object(self):
        with pytest.raises(ValueError):
            parse_listing_payload("[1, 2]")


class TestFinalizeCopy:
    def test_caps(self):
        payload = {
            "title": "Ord " * 60,
            "description": "x" * 6000,
            "tags": ["  Fiber  ", "", "y" * 80] + [f"t{i}" for i in range(30)],
        }
        copy = finalize_copy(payload)
        assert len(copy.title) <= 120
        assert not copy.title.endswith(" ")
        assert len(copy.description) == 5000
        assert copy.tags[0] == "Fiber"
        assert len(copy.tags[1]) == 50
        assert len(copy.tags) == 20

    def test_short_values_untouched(self):
        copy = finalize_copy(VALID)
        assert copy.title == VALID["title"]
        assert copy.tags == ["Fiber"]


# =========================================================================
# Strategies
# =========================================================================

class TestIsPublicImageUrl:
    @pytest.mark.parametrize("url,expected", [
        ("https://cdn.example.se/a.jpg", True),
        ("http://images.example.com/b.png", True),
        ("ftp://example.com/a.jpg", False),
        ("https://localhost/a.jpg", False),
        ("http://127.0.0.1/a.jpg", False),
        ("http://192.168.1.10/a.jpg", False),
        ("https://minio.internal/a.jpg", False),
        ("https://fileserver/a.jpg", False),
        ("/uploads/a.jpg", False),
    ])
    def test_urls(self, url, expected):
        assert is_public_image_url(url) is expected


class TestStrategyApplicability:
    def test_vision_needs_public_images(self):
        vision = VisionSchemaStrategy("m")
        assert not vision.is_applicable(GenerationRequest(prompt="p"))
        assert vision.is_applicable(GenerationRequest(
            prompt="p", images=["https://cdn.example.se/a.jpg"]))
        assert not vision.is_applicable(GenerationRequest(
            prompt="p", images=["https://cdn.example.se/a.jpg", "http://10.0.0.2/b.jpg"]))

    def test_text_and_chat_always_applicable(self):
        request = GenerationRequest(prompt="p")
        assert TextSchemaStrategy("m").is_applicable(request)
        assert ChatJsonStrategy("m").is_applicable(request)


class TestStrategyCalls:
    def test_vision_sends_images_and_schema(self):
        client = MagicMock()
        client.responses.create.return_value.output_text = json.dumps(VALID)
        request = GenerationRequest(prompt="p", images=["https://cdn.example.se/a.jpg"])

        raw = VisionSchemaStrategy("vision-model").attempt(client, request)

        assert json.loads(raw) == VALID
        kwargs = client.responses.create.call_args.kwargs
        assert kwargs["model"] == "vision-model"
        content = kwargs["input"][0]["content"]
        assert content[0] == {"type": "input_text", "text": "p"}
        assert content[1]["type"] == "input_image"
        assert content[1]["image_url"] == "https://cdn.example.se/a.jpg"
        fmt = kwargs["text"]["format"]
        assert fmt["type"] == "json_schema"
        assert fmt["strict"] is True

    def test_text_schema(self):
        client = MagicMock()
        client.responses.create.return_value.output_text = "{}"
        TextSchemaStrategy("text-model").attempt(client, GenerationRequest(prompt="p"))
        kwargs = client.responses.create.call_args.kwargs
        assert kwargs["input"] == "p"
        assert kwargs["text"]["format"]["type"] == "json_schema"

    def test_chat_json_mode(self):
        client = MagicMock()
        message = MagicMock()
        message.content = json.dumps(VALID)
        client.chat.completions.create.return_value.choices = [MagicMock(message=message)]

        raw = ChatJsonStrategy("chat-model").attempt(client, GenerationRequest(prompt="p"))

        assert json.loads(raw) == VALID
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["response_format"] == {"type": "json_object"}
        assert kwargs["messages"][1] == {"role": "user", "content": "p"}

    def test_chat_without_choices_is_empty(self):
        client = MagicMock()
        client.chat.completions.create.return_value.choices = []
        assert ChatJsonStrategy("m").attempt(client, GenerationRequest(prompt="p")) == ""


# =========================================================================
# Cascade
# =========================================================================

class TestGenerateListingCopy:
    def test_first_fails_second_succeeds_third_never_called(self):
        first = _Fixed("one", RuntimeError("provider down"))
        second = _Fixed("two", json.dumps(VALID))
        third = _Fixed("three", json.dumps({**VALID, "title": "Other"}))

        result = generate_listing_copy(MagicMock(), GenerationRequest(prompt="p"),
                                       strategies=[first, second, third])

        alone = generate_listing_copy(MagicMock(), GenerationRequest(prompt="p"),
                                      strategies=[_Fixed("two", json.dumps(VALID))])
        assert result == alone
        assert first.calls == 1
        assert second.calls == 1
        assert third.calls == 0

    def test_schema_violation_falls_through(self):
        bad = _Fixed("bad", json.dumps({"title": "", "description": "d", "tags": []}))
        good = _Fixed("good", json.dumps(VALID))
        result = generate_listing_copy(MagicMock(), GenerationRequest(prompt="p"),
                                       strategies=[bad, good])
        assert result.title == VALID["title"]

    def test_inapplicable_strategy_is_skipped(self):
        client = MagicMock()
        vision = VisionSchemaStrategy("vision-model")
        text = _Fixed("text", json.dumps(VALID))
        generate_listing_copy(client, GenerationRequest(prompt="p"), strategies=[vision, text])
        client.responses.create.assert_not_called()

    @patch("content_generator.sentry_sdk.capture_exception")
    def test_all_fail_raises_user_facing_error(self, mock_capture):
        cause = RuntimeError("secret provider detail")
        strategies = [_Fixed("a", cause), _Fixed("b", ""), _Fixed("c", "not json")]

        with pytest.raises(ListingGenerationError) as exc_info:
            generate_listing_copy(MagicMock(), GenerationRequest(prompt="p"),
                                  strategies=strategies)

        assert str(exc_info.value) == USER_MESSAGE
        assert "secret" not in str(exc_info.value)
        assert exc_info.value.__cause__ is None
        assert all(s.calls == 1 for s in strategies)
        mock_capture.assert_called_once()


class TestCreateClient:
    def test_blank_key_rejected(self):
        with pytest.raises(ValueError):
            create_client("  ")

    def test_timeout_and_no_sdk_retries(self):
        with patch("content_generator.OpenAI") as mock_openai:
            create_client(" sk-test ")
        mock_openai.assert_called_once_with(api_key="sk-test", timeout=30.0, max_retries=0)
