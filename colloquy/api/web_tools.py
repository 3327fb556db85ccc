"""Built-in web tools: weather (Open-Meteo) and websearch (DuckDuckGo).

Neither service needs an API key. Both share one httpx client that carries
no credentials (the model client's has the gateway key).
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import urlparse

import httpx
from pydantic import BaseModel, Field

from colloquy.api.tools import ToolCapability, ToolRegistry
from colloquy.config import Settings
from colloquy.errors import ToolExecutionError

logger = logging.getLogger(__name__)

GEOCODING_URL = "https://geocoding-api.open-meteo.com/v1/search"
FORECAST_URL = "https://api.open-meteo.com/v1/forecast"
DDG_URL = "https://api.duckduckgo.com/"

# WMO weather interpretation codes used by Open-Meteo
_WEATHER_CODES: dict[int, str] = {
    0: "Clear sky",
    1: "Mainly clear",
    2: "Partly cloudy",
    3: "Overcast",
    45: "Fog",
    48: "Depositing rime fog",
    51: "Light drizzle",
    53: "Moderate drizzle",
    55: "Dense drizzle",
    61: "Slight rain",
    63: "Moderate rain",
    65: "Heavy rain",
    66: "Light freezing rain",
    67: "Heavy freezing rain",
    71: "Slight snow",
    73: "Moderate snow",
    75: "Heavy snow",
    77: "Snow grains",
    80: "Slight rain showers",
    81: "Moderate rain showers",
    82: "Violent rain showers",
    85: "Slight snow showers",
    86: "Heavy snow showers",
    95: "Thunderstorm",
    96: "Thunderstorm with slight hail",
    99: "Thunderstorm with heavy hail",
}


# ---------------------------------------------------------------------------
# Input models
# ---------------------------------------------------------------------------


class WeatherInput(BaseModel):
    location: str = Field(min_length=1, description="City or place name, e.g. 'Tokyo' or 'Paris, France'")


class WebSearchInput(BaseModel):
    query: str = Field(
        min_length=1,
        description="A factual topic to look up (e.g., 'Python programming', 'Albert Einstein', 'Tokyo')",
    )
    limit: int = Field(5, ge=1, le=20, description="Maximum number of results")
    lang: str | None = Field(None, description="Two-letter region code, e.g. 'us' or 'de'")


# ---------------------------------------------------------------------------
# Tool handlers
# ---------------------------------------------------------------------------


async def _get_json(http: httpx.AsyncClient, url: str, params: dict[str, Any], timeout: float, service: str) -> Any:
    try:
        response = await http.get(url, params=params, timeout=timeout)
    except httpx.TimeoutException as e:
        raise ToolExecutionError(f"{service} timed out") from e
    except httpx.HTTPError as e:
        raise ToolExecutionError(f"Could not reach {service}: {e}") from e

    if response.status_code != 200:
        raise ToolExecutionError(f"{service} request failed (HTTP {response.status_code})")
    try:
        return response.json()
    except ValueError as e:
        raise ToolExecutionError(f"{service} returned invalid JSON") from e


async def _weather(params: WeatherInput, *, _settings: Settings, _http: httpx.AsyncClient) -> dict[str, Any]:
    """Geocode the location, then fetch current conditions for the best match."""
    geo = await _get_json(
        _http,
        GEOCODING_URL,
        {"name": params.location, "count": 1, "language": "en", "format": "json"},
        _settings.web_timeout,
        "Geocoding service",
    )
    places = geo.get("results") if isinstance(geo, dict) else None
    if not places:
        raise ToolExecutionError(f"Location not found: {params.location}")
    place = places[0]

    forecast = await _get_json(
        _http,
        FORECAST_URL,
        {
            "latitude": place["latitude"],
            "longitude": place["longitude"],
            "current": "temperature_2m,apparent_temperature,relative_humidity_2m,weather_code,wind_speed_10m",
            "timezone": "auto",
        },
        _settings.web_timeout,
        "Weather service",
    )
    current = forecast.get("current") if isinstance(forecast, dict) else None
    if not current:
        raise ToolExecutionError("Weather service returned no current conditions")

    label = ", ".join(p for p in (place.get("name"), place.get("country")) if p)
    code = current.get("weather_code")
    return {
        "location": label or params.location,
        "temp": current.get("temperature_2m"),
        "feels_like": current.get("apparent_temperature"),
        "humidity": current.get("relative_humidity_2m"),
        "wind_speed": current.get("wind_speed_10m"),
        "condition": _WEATHER_CODES.get(code, "Unknown") if isinstance(code, int) else "Unknown",
        "units": {"temp": "°C", "wind_speed": "km/h", "humidity": "%"},
    }


def _flatten_topics(items: list[Any], acc: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Related topics nest one level of groups ({"Name", "Topics"})."""
    for item in items or []:
        if not isinstance(item, dict):
            continue
        if isinstance(item.get("Topics"), list):
            _flatten_topics(item["Topics"], acc)
        elif item.get("FirstURL") and item.get("Text"):
            acc.append(item)
    return acc


async def _websearch(params: WebSearchInput, *, _settings: Settings, _http: httpx.AsyncClient) -> dict[str, Any]:
    """DuckDuckGo instant-answer lookup: direct results first, then related topics."""
    data = await _get_json(
        _http,
        DDG_URL,
        {
            "q": params.query,
            "format": "json",
            "no_redirect": "1",
            "no_html": "1",
            "t": "colloquy",
            "kl": f"{params.lang}-en" if params.lang else "",
        },
        _settings.web_timeout,
        "DuckDuckGo",
    )
    if not isinstance(data, dict):
        raise ToolExecutionError("DuckDuckGo returned an unexpected payload")

    topics = _flatten_topics(data.get("Results") or [], [])
    topics = _flatten_topics(data.get("RelatedTopics") or [], topics)

    results = []
    for topic in topics[: params.limit]:
        hostname = urlparse(topic["FirstURL"]).hostname
        results.append(
            {
                "title": topic["Text"],
                "url": topic["FirstURL"],
                "snippet": None,
                "source": hostname or "DuckDuckGo",
            }
        )
    return {"query": params.query, "results": results}


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def register_web_tools(
    registry: ToolRegistry,
    settings: Settings,
    http_client: httpx.AsyncClient,
) -> None:
    """Register weather and websearch with the registry.

    Creates closure wrappers that inject settings and the httpx client.
    """

    async def _weather_handler(params: WeatherInput) -> dict[str, Any]:
        return await _weather(params, _settings=settings, _http=http_client)

    async def _websearch_handler(params: WebSearchInput) -> dict[str, Any]:
        return await _websearch(params, _settings=settings, _http=http_client)

    registry.register(
        ToolCapability(
            slug="weather",
            name="Weather Lookup",
            description="Get the current weather for a location (temperature, humidity, wind, conditions).",
            input_model=WeatherInput,
            handler=_weather_handler,
            category="utilities",
        )
    )
    registry.register(
        ToolCapability(
            slug="websearch",
            name="Topic Lookup",
            description=(
                "Look up factual information about topics, people, places, or concepts using DuckDuckGo. "
                "Best for encyclopedic queries like 'Python programming language' or 'Tokyo Japan'. "
                "Not suitable for general web searches like 'best tutorials'."
            ),
            input_model=WebSearchInput,
            handler=_websearch_handler,
            category="research",
        )
    )
