import os
import re
import json
import asyncio
import logging
from typing import Any, Dict, List, Optional

# Google GenAI for soil, weather and crop content
import google.generativeai as genai
from dotenv import load_dotenv

from weather import LocationNotFound

load_dotenv()

logger = logging.getLogger(__name__)

# Initialize Google GenAI Client
API_KEY = os.getenv("GOOGLE_API_KEY")
if not API_KEY:
    logger.warning("GOOGLE_API_KEY not found. Gemini-backed endpoints will fail and the sell advisor runs in demo mode.")
else:
    genai.configure(api_key=API_KEY)

# Models used for the different prompts
CONTENT_MODEL = "gemini-2.0-flash"
SOIL_LIST_MODEL = "gemini-2.0-flash-lite"
TEMPERATURE = 0.2

# First opening bracket to the last closing bracket, objects or arrays
ANY_JSON = re.compile(r"[\{\[][\s\S]*[\}\]]")
JSON_ARRAY = re.compile(r"\[[\s\S]*\]")

SUPPORTED_LANGUAGES = {
    "en": "English",
    "hi": "Hindi",
    "te": "Telugu",
    "ta": "Tamil",
    "mr": "Marathi",
    "bn": "Bengali",
    "es": "Spanish",
    "fr": "French",
}


class GeminiError(Exception):
    """Raised when the Gemini API cannot be reached or refuses the request."""


class GeminiResponseError(GeminiError):
    """Raised when Gemini answered but the answer is not the JSON we asked for."""


# --- JSON extraction ---

def extract_json(text: str, pattern: re.Pattern = ANY_JSON) -> Any:
    """Pulls the JSON fragment out of a free-text model answer."""
    match = pattern.search(text or "")
    candidate = match.group(0) if match else text
    try:
        return json.loads(candidate)
    except (TypeError, ValueError) as e:
        logger.error("Could not parse JSON from Gemini response: %s", e)
        raise GeminiResponseError("Error processing data from Gemini API") from e


async def ask_gemini(
    prompt: str,
    max_output_tokens: int = 2000,
    model_name: str = CONTENT_MODEL,
    pattern: re.Pattern = ANY_JSON,
) -> Any:
    """Sends a prompt to Gemini and returns the JSON embedded in its answer."""
    try:
        model = genai.GenerativeModel(model_name)
        response = await model.generate_content_async(
            prompt,
            generation_config=genai.GenerationConfig(
                temperature=TEMPERATURE,
                max_output_tokens=max_output_tokens,
            ),
        )
        text = response.text
    except Exception as e:
        logger.error("Error during Gemini API call: %s", e)
        raise GeminiError(f"Gemini API error: {e}") from e
    return extract_json(text, pattern)


# --- Soil Logic ---

async def fetch_soil_types(location: str) -> List[Dict[str, str]]:
    """Common soil types for a location as a list of {id, name, description}."""
    prompt = f"""Based on the geographic location {location}, provide a JSON array of common soil types found in this region.
    Include at least 3-5 soil types with these fields for each:
    id (a short identifier), name (the soil type name), and description (brief characteristics of the soil).
    Format as proper JSON with no markdown or explanations outside the JSON. Just return a raw JSON array."""
    try:
        soils = await ask_gemini(
            prompt, max_output_tokens=1000, model_name=SOIL_LIST_MODEL, pattern=JSON_ARRAY
        )
    except GeminiError as e:
        logger.error("Error fetching soil types for %s: %s", location, e)
        raise GeminiError("Unable to retrieve soil types for this location") from e
    if not isinstance(soils, list):
        raise GeminiError("Unable to retrieve soil types for this location")
    return soils


async def fetch_soil_details(location: str, soil: Dict[str, str]) -> Dict[str, Any]:
    prompt = f"""Provide detailed analysis of {soil['name']} soil in {location} as JSON with:
    type (full soil name),
    characteristics (detailed description),
    suitableCrops (array of 5-7 crop names).
    Format: {{
      "type": "...",
      "characteristics": "...",
      "suitableCrops": ["crop1", "crop2"]
    }}"""
    soil_info = await ask_gemini(prompt)

    if (
        not isinstance(soil_info, dict)
        or not soil_info.get("type")
        or not soil_info.get("characteristics")
        or not isinstance(soil_info.get("suitableCrops"), list)
    ):
        raise GeminiResponseError("Invalid soil data format received")
    return soil_info


# --- Crop Logic ---

async def fetch_weather_snapshot(location: str) -> Dict[str, Any]:
    """Gemini's view of the current weather; also tells us whether the location exists."""
    prompt = f"""Provide current weather data for {location} as JSON with:
    temperature (number), humidity (number), conditions (string),
    windSpeed (number), pressure (number), validLocation (boolean).
    If location is invalid, set validLocation: false."""
    weather = await ask_gemini(prompt)
    if not isinstance(weather, dict) or not weather.get("validLocation"):
        raise LocationNotFound("Location not found")
    return weather


async def fetch_market_trends(location: str) -> List[Dict[str, Any]]:
    prompt = f"""Provide current agricultural market trends for {location} as JSON array with:
    crop, currentPrice, trend (Increasing/Decreasing/Stable), demandLevel (High/Medium/Low)"""
    trends = await ask_gemini(prompt)
    return trends if isinstance(trends, list) else []


async def fetch_historical_data(location: str) -> Dict[str, Any]:
    prompt = f"""Provide agricultural historical data for {location} as JSON with:
    previousYearYield (%), commonIssues (array), successRate (%)"""
    history = await ask_gemini(prompt)
    return history if isinstance(history, dict) else {}


async def fetch_crop_recommendations(
    location: str,
    soil: Dict[str, Any],
    weather: Dict[str, Any],
    trends: List[Dict[str, Any]],
    history: Optional[Dict[str, Any]],
) -> List[Dict[str, Any]]:
    prompt = f"""Generate crop recommendations for {location} with:
    Soil: {soil['type']} ({soil['characteristics']})
    Weather: {weather.get('temperature')}°C, {weather.get('conditions')}
    Market Trends: {json.dumps(trends)}
    Historical Data: {json.dumps(history)}

    Respond in JSON array with fields:
    crop, suitability (High/Medium/Low), description,
    marketPotential, riskFactors (array)"""
    recommendations = await ask_gemini(prompt)
    return recommendations if isinstance(recommendations, list) else []


async def fetch_crop_soil_types(location: str) -> List[Dict[str, str]]:
    """The five main soils of a location, as offered on the crop planner."""
    prompt = f"""List soil types for {location} as JSON array with:
    id (short id), name (soil type), description (key characteristics).
    Include 5 main soil types."""
    soils = await ask_gemini(prompt)
    return soils if isinstance(soils, list) else []


async def analyze_location(location: str) -> Dict[str, Any]:
    """
    Validates the location through a weather snapshot, then gathers soils,
    market trends and history in parallel.
    """
    location = (location or "").strip()
    if not location:
        raise ValueError("Please enter a location")

    weather = await fetch_weather_snapshot(location)
    soils, trends, history = await asyncio.gather(
        fetch_crop_soil_types(location),
        fetch_market_trends(location),
        fetch_historical_data(location),
    )
    return {
        "location": location,
        "weather": weather,
        "soilTypes": soils,
        "selectedSoilType": soils[0]["id"] if soils else "",
        "marketTrends": [{**t, "direction": trend_direction(t.get("trend"))} for t in trends],
        "historicalData": history,
    }


async def recommend_crops(location: str, soil_id: str, analysis: Dict[str, Any]) -> Dict[str, Any]:
    """Soil details for the chosen soil and the crop recommendations built on them."""
    soil = next((s for s in analysis.get("soilTypes") or [] if s.get("id") == soil_id), None)
    if soil is None:
        raise LookupError("Soil type not found")

    soil_info = await fetch_soil_details(location, soil)
    recommendations: List[Dict[str, Any]] = []
    weather = analysis.get("weather")
    if weather:
        recommendations = await fetch_crop_recommendations(
            location,
            soil_info,
            weather,
            analysis.get("marketTrends") or [],
            analysis.get("historicalData"),
        )
    return {
        "soil": soil_info,
        "recommendations": [
            {**rec, "level": suitability_level(rec.get("suitability"))} for rec in recommendations
        ],
    }


def suitability_level(suitability: str) -> str:
    value = (suitability or "").strip().lower()
    return value if value in ("high", "medium") else "low"


def trend_direction(trend: str) -> str:
    value = (trend or "").strip().lower()
    return value if value in ("increasing", "decreasing") else "stable"


# --- Translation ---

async def translate_texts(texts: Dict[str, str], language: str) -> Dict[str, str]:
    """Translates a bundle of UI strings, keeping the source text for anything Gemini drops."""
    if language == "en":
        return dict(texts)
    if language not in SUPPORTED_LANGUAGES:
        raise ValueError(f"Unsupported language: {language}")
    if not texts:
        return {}

    language_name = SUPPORTED_LANGUAGES[language]
    prompt = f"""Translate the values of this JSON object into {language_name}.
    Keep the keys unchanged and return only the JSON object.
    {json.dumps(texts, ensure_ascii=False)}"""
    translated = await ask_gemini(prompt, max_output_tokens=4000)
    if not isinstance(translated, dict):
        raise GeminiResponseError("Error processing translation from Gemini API")

    return {
        key: translated[key] if isinstance(translated.get(key), str) and translated[key] else value
        for key, value in texts.items()
    }
