import os
import math
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import openmeteo_requests
import pandas as pd
import requests
import requests_cache
from dotenv import load_dotenv
from openai import AsyncOpenAI
from retry_requests import retry

load_dotenv()

logger = logging.getLogger(__name__)

FORECAST_URL = "https://api.open-meteo.com/v1/forecast"
GEOCODING_URL = "https://geocoding-api.open-meteo.com/v1/search"
CACHE_PATH = os.getenv("WEATHER_CACHE_PATH", ".cache")
CACHE_SECONDS = 3600

DHENU_BASE_URL = os.getenv("DHENU_BASE_URL", "https://api.dhenu.ai/v1")
DHENU_API_KEY = os.getenv("DHENU_API_KEY")
DHENU_MODEL = "dhenu2-in-8b-preview"

FORECAST_DAYS = 5
HOURLY_HOURS = 24
# Largest per-day temperature miss (°C) still counted as partially accurate
MAX_ACCEPTABLE_DIFFERENCE = 10

CURRENT_VARS = [
    "temperature_2m", "relative_humidity_2m", "apparent_temperature",
    "is_day", "precipitation", "weather_code", "wind_speed_10m",
]
HOURLY_VARS = [
    "temperature_2m", "relative_humidity_2m", "apparent_temperature",
    "precipitation_probability", "precipitation", "weather_code", "wind_speed_10m", "is_day",
]
DAILY_VARS = [
    "weather_code", "temperature_2m_max", "temperature_2m_min",
    "precipitation_probability_max", "precipitation_sum",
    "relative_humidity_2m_max", "wind_speed_10m_max",
]

RAIN_ADVISORY = (
    "Rain expected in your area. Hold off on applying fertilizers or pesticides as they may wash away. "
    "This is a good time for planting if your soil isn't waterlogged. Consider checking drainage systems in fields."
)
HEAT_ADVISORY = (
    "High temperatures expected. Ensure crops receive adequate irrigation, preferably in early morning or "
    "evening to minimize evaporation. Monitor for heat stress in livestock and provide ample shade and water."
)
FAVORABLE_ADVISORY = (
    "Weather conditions are favorable for most farming activities. A good time for field work, crop maintenance, "
    "and regular irrigation. Monitor soil moisture levels as moderate temperatures continue."
)
NO_DATA_ADVISORY = "Advisory will appear once weather data is loaded."

# WMO weather interpretation codes -> (description, icon base)
WMO_CODES = {
    0: ("clear sky", "01"),
    1: ("mainly clear", "02"),
    2: ("partly cloudy", "03"),
    3: ("overcast clouds", "04"),
    45: ("fog", "50"),
    48: ("depositing rime fog", "50"),
    51: ("light drizzle", "09"),
    53: ("moderate drizzle", "09"),
    55: ("dense drizzle", "09"),
    56: ("light freezing drizzle", "09"),
    57: ("dense freezing drizzle", "09"),
    61: ("light rain", "10"),
    63: ("moderate rain", "10"),
    65: ("heavy rain", "10"),
    66: ("light freezing rain", "13"),
    67: ("heavy freezing rain", "13"),
    71: ("light snow", "13"),
    73: ("moderate snow", "13"),
    75: ("heavy snow", "13"),
    77: ("snow grains", "13"),
    80: ("light rain showers", "09"),
    81: ("moderate rain showers", "09"),
    82: ("violent rain showers", "09"),
    85: ("light snow showers", "13"),
    86: ("heavy snow showers", "13"),
    95: ("thunderstorm", "11"),
    96: ("thunderstorm with light hail", "11"),
    99: ("thunderstorm with heavy hail", "11"),
}


class LocationNotFound(Exception):
    """Raised when a free-text location cannot be resolved."""


class WeatherServiceError(Exception):
    """Raised when the geocoding or forecast service fails."""


# --- Weather Data Fetching and Formatting ---

def _cached_session():
    cache_session = requests_cache.CachedSession(CACHE_PATH, expire_after=CACHE_SECONDS)
    return retry(cache_session, retries=5, backoff_factor=0.2)


def _num(value, digits: int = 1) -> Optional[float]:
    value = float(value)
    if math.isnan(value):
        return None
    return round(value, digits)


def describe_weather_code(code, is_day: bool = True) -> Dict[str, str]:
    """Maps a WMO code to a description and an OpenWeather-style icon code."""
    try:
        code = int(code)
    except (TypeError, ValueError):
        code = None
    description, icon = WMO_CODES.get(code, ("unknown", "03"))
    return {"description": description, "icon": icon + ("d" if is_day else "n")}


def _geocode_results(name: str, count: int = 5) -> List[Dict[str, Any]]:
    params = {"name": name, "count": count, "language": "en", "format": "json"}
    try:
        response = _cached_session().get(GEOCODING_URL, params=params, timeout=10)
        response.raise_for_status()
    except requests.RequestException as e:
        logger.error("Geocoding failed for %s: %s", name, e)
        raise WeatherServiceError(f"Geocoding service error: {e}") from e
    return response.json().get("results") or []


def _matches_qualifiers(result: Dict[str, Any], qualifiers: List[str]) -> bool:
    haystack = " ".join(
        str(result.get(key, "")) for key in ("admin1", "admin2", "country", "country_code")
    ).lower()
    return all(q.lower() in haystack for q in qualifiers)


def _place_from_result(result: Dict[str, Any]) -> Dict[str, Any]:
    secondary = ", ".join(p for p in (result.get("admin1"), result.get("country")) if p)
    return {
        "description": f"{result['name']}, {secondary}" if secondary else result["name"],
        "place_id": str(result.get("id", "")),
        "main_text": result["name"],
        "secondary_text": secondary,
        "latitude": result.get("latitude"),
        "longitude": result.get("longitude"),
        "country": result.get("country_code", ""),
    }


def search_places(text: str) -> List[Dict[str, Any]]:
    """Place suggestions while the user types a location."""
    text = (text or "").strip()
    if len(text) < 2:
        return []
    parts = [part.strip() for part in text.split(",") if part.strip()]
    if not parts:
        return []
    name, *qualifiers = parts
    results = _geocode_results(name)
    matching = [r for r in results if _matches_qualifiers(r, qualifiers)]
    return [_place_from_result(r) for r in (matching or results)]


def geocode(location: str) -> Dict[str, Any]:
    """Resolves 'City, State, Country' style input to the best matching place."""
    location = (location or "").strip()
    if not location:
        raise ValueError("Location Required")
    places = search_places(location)
    if not places:
        raise LocationNotFound("Location not found. Please check the spelling and try again.")
    return places[0]


def _series(block, names: List[str]) -> pd.DataFrame:
    """Turns an Open-Meteo hourly/daily block into a DataFrame indexed by UTC time."""
    data = {
        "time": pd.date_range(
            start=pd.to_datetime(block.Time(), unit="s", utc=True),
            end=pd.to_datetime(block.TimeEnd(), unit="s", utc=True),
            freq=pd.Timedelta(seconds=block.Interval()),
            inclusive="left",
        )
    }
    for i, name in enumerate(names):
        data[name] = block.Variables(i).ValuesAsNumpy()
    return pd.DataFrame(data=data)


def get_weather_forecast(latitude: float, longitude: float):
    """Fetches current, hourly and daily data for one location in a single call."""
    openmeteo = openmeteo_requests.Client(session=_cached_session())
    params = {
        "latitude": latitude,
        "longitude": longitude,
        "current": CURRENT_VARS,
        "hourly": HOURLY_VARS,
        "daily": DAILY_VARS,
        "forecast_days": FORECAST_DAYS,
        "forecast_hours": HOURLY_HOURS,
        "wind_speed_unit": "ms",
        "timezone": "auto",
    }
    response = openmeteo.weather_api(FORECAST_URL, params=params)[0]

    current = response.Current()
    current_values = {name: current.Variables(i).Value() for i, name in enumerate(CURRENT_VARS)}
    current_values["time"] = current.Time()

    hourly_df = _series(response.Hourly(), HOURLY_VARS)
    daily_df = _series(response.Daily(), DAILY_VARS)
    offset = pd.Timedelta(seconds=response.UtcOffsetSeconds())
    daily_df["date"] = (daily_df["time"] + offset).dt.date
    return current_values, hourly_df, daily_df


def _current_block(values: Dict[str, Any], place: Dict[str, Any]) -> Dict[str, Any]:
    look = describe_weather_code(values["weather_code"], bool(values["is_day"]))
    block = {
        "temp": _num(values["temperature_2m"]),
        "feels_like": _num(values["apparent_temperature"]),
        "humidity": _num(values["relative_humidity_2m"], 0),
        "description": look["description"],
        "icon": look["icon"],
        "wind_speed": _num(values["wind_speed_10m"]),
        "rain_1h": None,
        "name": place["main_text"],
        "country": place.get("country", ""),
        "dt": int(values["time"]),
    }
    precipitation = _num(values["precipitation"])
    if precipitation:
        block["rain_1h"] = precipitation
    return block


def _hourly_block(hourly_df: pd.DataFrame) -> List[Dict[str, Any]]:
    hours = []
    for _, hour in hourly_df.head(HOURLY_HOURS).iterrows():
        look = describe_weather_code(hour["weather_code"], bool(hour["is_day"]))
        probability = _num(hour["precipitation_probability"], 0) or 0
        pop = round(probability / 100, 2)
        hours.append({
            "dt": int(hour["time"].timestamp()),
            "temp": _num(hour["temperature_2m"]),
            "feels_like": _num(hour["apparent_temperature"]),
            "humidity": _num(hour["relative_humidity_2m"], 0),
            "description": look["description"],
            "icon": look["icon"],
            "wind_speed": _num(hour["wind_speed_10m"]),
            "pop": pop,
            "rain_3h": _num(hour["precipitation"]) if pop > 0.3 else None,
        })
    return hours


def _daily_block(daily_df: pd.DataFrame) -> List[Dict[str, Any]]:
    days = []
    for _, day in daily_df.iterrows():
        look = describe_weather_code(day["weather_code"])
        days.append({
            "date": day["date"].isoformat(),
            "temp": _num(day["temperature_2m_max"], 0),
            "temp_min": _num(day["temperature_2m_min"], 0),
            "description": look["description"],
            "humidity": _num(day["relative_humidity_2m_max"], 0),
            "windSpeed": _num(day["wind_speed_10m_max"]),
            "rainChance": _num(day["precipitation_probability_max"], 0) or 0,
            "rainfall": _num(day["precipitation_sum"]),
            "icon": look["icon"],
        })
    return days


def farming_advisory(description: str, temp: Optional[float], has_forecast: bool = True) -> str:
    """Rule-based advisory from today's conditions."""
    if not has_forecast:
        return NO_DATA_ADVISORY
    if "rain" in (description or "").lower():
        return RAIN_ADVISORY
    if temp is not None and temp > 30:
        return HEAT_ADVISORY
    return FAVORABLE_ADVISORY


def get_weather_report(location: str) -> Dict[str, Any]:
    """Current weather, 24-hour outlook, 5-day forecast and advisory for a location."""
    place = geocode(location)
    logger.info("Fetching forecast for %s (%s, %s)", place["description"], place["latitude"], place["longitude"])
    try:
        current_values, hourly_df, daily_df = get_weather_forecast(place["latitude"], place["longitude"])
    except Exception as e:
        logger.error("Could not fetch weather data for %s: %s", location, e)
        raise WeatherServiceError(f"Could not fetch weather data: {e}") from e

    current = _current_block(current_values, place)
    forecast = _daily_block(daily_df)
    return {
        "location": place["description"],
        "latitude": place["latitude"],
        "longitude": place["longitude"],
        "current": current,
        "hourly": _hourly_block(hourly_df),
        "forecast": forecast,
        "advisory": farming_advisory(current["description"], current["temp"], bool(forecast)),
    }


def format_data_for_llm(forecast: List[Dict[str, Any]]) -> str:
    """Formats the daily forecast into a clean string for the LLM."""
    data_string = ""
    for day in forecast:
        date_str = datetime.fromisoformat(day["date"]).strftime("%A, %B %d")
        data_string += (
            f"- {date_str}: "
            f"Max Temp: {day['temp']}°C, "
            f"Min Temp: {day['temp_min']}°C, "
            f"Rainfall: {day['rainfall']} mm, "
            f"Rain Chance: {day['rainChance']}%, "
            f"Humidity: {day['humidity']}%, "
            f"Wind: {day['windSpeed']} m/s, "
            f"Conditions: {day['description']}\n"
        )
    return data_string


# --- Dhenu LLM Integration for Advisory ---

def build_advisory_prompt(report: Dict[str, Any], crop: str, language: str) -> str:
    return f"""
    You are Dhenu, a Chief Agronomist AI.
    FARM CONTEXT:
    - Location: {report['location']} (Latitude {report['latitude']}, Longitude {report['longitude']})
    - Crop: {crop}
    - Current conditions: {report['current']['description']}, {report['current']['temp']}°C
    - Output Language: {language}
    {len(report['forecast'])}-DAY FORECAST:
    {format_data_for_llm(report['forecast'])}
    YOUR TASK:
    Analyze all data to create a practical advisory. Follow the output structure below exactly.
    OUTPUT STRUCTURE:
    Weekly Focus: [Your single, bold sentence on the week's most critical issue]
    Disease Risk Alert: [Your identification of the most likely disease, or "No major disease risk this week"]
    Day-by-Day Action Plan:
    [Day Name], [Date]
    - Irrigation: [Your advice]
    - Fertilizer Application: [Your advice]
    - Pest/Disease Management: [Your advice]
    ... (continue for all days)
    Generate the advisory now in {language}.
    """


async def generate_llm_advisory(report: Dict[str, Any], crop: str = "Rice", language: str = "English") -> str:
    """Connects to the Dhenu API, generates an advisory, and returns it as a string."""
    if not DHENU_API_KEY:
        return "Detailed advisory unavailable: DHENU_API_KEY is not configured."

    advisory_chunks = []
    async with AsyncOpenAI(base_url=DHENU_BASE_URL, api_key=DHENU_API_KEY) as client:
        try:
            stream = await client.chat.completions.create(
                model=DHENU_MODEL,
                messages=[{"role": "user", "content": build_advisory_prompt(report, crop, language)}],
                stream=True,
            )
            async for chunk in stream:
                if chunk.choices and chunk.choices[0].delta.content:
                    advisory_chunks.append(chunk.choices[0].delta.content)
            return "".join(advisory_chunks)
        except Exception as e:
            error_message = f"An error occurred connecting to Dhenu API: {e}"
            logger.error(error_message)
            return error_message


# --- Community poll and prediction accuracy ---

def calculate_accuracy(records: Iterable[Dict[str, Any]]) -> float:
    """Percentage score from predicted vs actual temperatures, clamped to 0-100."""
    records = list(records)
    if not records:
        return 0.0
    total_difference = sum(abs(float(r["predicted"]) - float(r["actual"])) for r in records)
    max_possible_difference = MAX_ACCEPTABLE_DIFFERENCE * len(records)
    accuracy = 100 - (total_difference / max_possible_difference * 100)
    return max(0.0, min(100.0, accuracy))


def tally_votes(votes: Iterable[Dict[str, Any]]) -> Dict[str, int]:
    poll = {"total": 0, "accurate": 0, "inaccurate": 0}
    for vote in votes:
        if vote.get("accurate"):
            poll["accurate"] += 1
        else:
            poll["inaccurate"] += 1
        poll["total"] += 1
    return poll
