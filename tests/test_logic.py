"""Gemini prompting helpers: JSON extraction, validation and the crop flow."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

import logic
from weather import LocationNotFound


class TestExtractJson:

    def test_plain_object(self):
        assert logic.extract_json('{"a": 1}') == {"a": 1}

    def test_object_inside_markdown_fence(self):
        text = 'Here you go:\n```json\n{"type": "Loam", "suitableCrops": ["Wheat"]}\n```\nEnjoy!'
        assert logic.extract_json(text) == {"type": "Loam", "suitableCrops": ["Wheat"]}

    def test_array_pattern_skips_leading_object_text(self):
        text = 'Soils {note} below: [{"id": "red", "name": "Red Soil"}]'
        assert logic.extract_json(text, logic.JSON_ARRAY) == [{"id": "red", "name": "Red Soil"}]

    def test_unparseable_raises(self):
        with pytest.raises(logic.GeminiResponseError):
            logic.extract_json("I cannot answer that.")


def _fake_model(text):
    model = MagicMock()
    model.generate_content_async = AsyncMock(return_value=MagicMock(text=text))
    return model


def test_ask_gemini_parses_response_text():
    with patch("logic.genai.GenerativeModel", return_value=_fake_model('[{"crop": "Rice"}]')) as factory:
        result = asyncio.run(logic.ask_gemini("prompt"))
    assert result == [{"crop": "Rice"}]
    factory.assert_called_once_with(logic.CONTENT_MODEL)


def test_ask_gemini_wraps_api_failures():
    model = MagicMock()
    model.generate_content_async = AsyncMock(side_effect=RuntimeError("quota exceeded"))
    with patch("logic.genai.GenerativeModel", return_value=model):
        with pytest.raises(logic.GeminiError) as excinfo:
            asyncio.run(logic.ask_gemini("prompt"))
    assert "quota exceeded" in str(excinfo.value)


def test_fetch_soil_types_uses_lite_model_and_surfaces_friendly_error():
    with patch("logic.ask_gemini", AsyncMock(side_effect=logic.GeminiError("boom"))) as ask:
        with pytest.raises(logic.GeminiError, match="Unable to retrieve soil types"):
            asyncio.run(logic.fetch_soil_types("Pune"))
    assert ask.call_args.kwargs["model_name"] == logic.SOIL_LIST_MODEL
    assert ask.call_args.kwargs["max_output_tokens"] == 1000


@pytest.mark.parametrize("payload", [
    {"characteristics": "x", "suitableCrops": []},
    {"type": "Black", "characteristics": "", "suitableCrops": ["Cotton"]},
    {"type": "Black", "characteristics": "x", "suitableCrops": "Cotton"},
    ["not", "an", "object"],
])
def test_fetch_soil_details_rejects_malformed(payload):
    with patch("logic.ask_gemini", AsyncMock(return_value=payload)):
        with pytest.raises(logic.GeminiResponseError, match="Invalid soil data format"):
            asyncio.run(logic.fetch_soil_details("Nagpur", {"id": "black", "name": "Black"}))


def test_crop_soil_types_use_content_model_and_five_soils():
    soils = [{"id": "alluvial", "name": "Alluvial", "description": "fertile"}]
    with patch("logic.genai.GenerativeModel", return_value=_fake_model(f"Sure: {json.dumps(soils)}")) as factory:
        result = asyncio.run(logic.fetch_crop_soil_types("Ludhiana"))
    assert result == soils
    factory.assert_called_once_with(logic.CONTENT_MODEL)
    prompt = factory.return_value.generate_content_async.call_args.args[0]
    assert "Include 5 main soil types" in prompt


def test_crop_soil_types_non_list_is_empty():
    with patch("logic.ask_gemini", AsyncMock(return_value={"soil": "loam"})):
        assert asyncio.run(logic.fetch_crop_soil_types("Ludhiana")) == []


def test_weather_snapshot_invalid_location():
    with patch("logic.ask_gemini", AsyncMock(return_value={"validLocation": False})):
        with pytest.raises(LocationNotFound):
            asyncio.run(logic.fetch_weather_snapshot("Atlantis"))


def test_analyze_location_gathers_everything():
    weather = {"temperature": 28, "conditions": "sunny", "validLocation": True}
    soils = [{"id": "black", "name": "Black Soil", "description": "clayey"}]
    with patch("logic.fetch_weather_snapshot", AsyncMock(return_value=weather)), \
            patch("logic.fetch_crop_soil_types", AsyncMock(return_value=soils)), \
            patch("logic.fetch_market_trends", AsyncMock(return_value=[{"crop": "Onion"}])), \
            patch("logic.fetch_historical_data", AsyncMock(return_value={"successRate": "80%"})):
        result = asyncio.run(logic.analyze_location("  Nashik  "))

    assert result["location"] == "Nashik"
    assert result["selectedSoilType"] == "black"
    assert result["marketTrends"] == [{"crop": "Onion", "direction": "stable"}]
    assert result["historicalData"] == {"successRate": "80%"}


def test_analyze_location_stops_on_invalid_location():
    soils = AsyncMock()
    with patch("logic.fetch_weather_snapshot", AsyncMock(side_effect=LocationNotFound("Location not found"))), \
            patch("logic.fetch_crop_soil_types", soils):
        with pytest.raises(LocationNotFound):
            asyncio.run(logic.analyze_location("Atlantis"))
    soils.assert_not_called()


def test_analyze_location_requires_text():
    with pytest.raises(ValueError):
        asyncio.run(logic.analyze_location("   "))


def test_recommend_crops_unknown_soil():
    with pytest.raises(LookupError, match="Soil type not found"):
        asyncio.run(logic.recommend_crops("Pune", "sandy", {"soilTypes": [{"id": "black", "name": "Black"}]}))


def test_recommend_crops_skips_recommendations_without_weather():
    soil_info = {"type": "Black", "characteristics": "clayey", "suitableCrops": ["Cotton"]}
    recommender = AsyncMock()
    with patch("logic.fetch_soil_details", AsyncMock(return_value=soil_info)), \
            patch("logic.fetch_crop_recommendations", recommender):
        result = asyncio.run(logic.recommend_crops("Pune", "black", {"soilTypes": [{"id": "black", "name": "Black"}]}))
    assert result == {"soil": soil_info, "recommendations": []}
    recommender.assert_not_called()


def test_crop_prompt_embeds_soil_and_weather():
    ask = AsyncMock(return_value=[{"crop": "Cotton", "suitability": "High"}])
    with patch("logic.ask_gemini", ask):
        result = asyncio.run(logic.fetch_crop_recommendations(
            "Akola",
            {"type": "Black Cotton Soil", "characteristics": "high clay"},
            {"temperature": 31, "conditions": "clear sky"},
            [{"crop": "Cotton", "trend": "Increasing"}],
            {"successRate": "70%"},
        ))
    prompt = ask.call_args.args[0]
    assert "Black Cotton Soil (high clay)" in prompt
    assert "31°C, clear sky" in prompt
    assert '"trend": "Increasing"' in prompt
    assert result[0]["crop"] == "Cotton"


def test_level_helpers():
    assert logic.suitability_level("HIGH ") == "high"
    assert logic.suitability_level("Very good") == "low"
    assert logic.trend_direction("Decreasing") == "decreasing"
    assert logic.trend_direction(None) == "stable"


class TestTranslate:

    def test_english_is_passthrough(self):
        texts = {"title": "Weather"}
        assert asyncio.run(logic.translate_texts(texts, "en")) == texts

    def test_unsupported_language(self):
        with pytest.raises(ValueError):
            asyncio.run(logic.translate_texts({"title": "Weather"}, "xx"))

    def test_missing_keys_fall_back_to_source(self):
        with patch("logic.ask_gemini", AsyncMock(return_value={"title": "मौसम"})) as ask:
            result = asyncio.run(logic.translate_texts({"title": "Weather", "rain": "rain"}, "hi"))
        assert result == {"title": "मौसम", "rain": "rain"}
        assert "Hindi" in ask.call_args.args[0]


def test_recommend_crops_tags_suitability_level():
    soil_info = {"type": "Black", "characteristics": "clayey", "suitableCrops": ["Cotton"]}
    analysis = {
        "soilTypes": [{"id": "black", "name": "Black"}],
        "weather": {"temperature": 30, "conditions": "sunny"},
        "marketTrends": [],
        "historicalData": {},
    }
    recs = [{"crop": "Cotton", "suitability": "High"}, {"crop": "Rice", "suitability": "poor"}]
    with patch("logic.fetch_soil_details", AsyncMock(return_value=soil_info)), \
            patch("logic.fetch_crop_recommendations", AsyncMock(return_value=recs)):
        result = asyncio.run(logic.recommend_crops("Akola", "black", analysis))
    assert [r["level"] for r in result["recommendations"]] == ["high", "low"]
