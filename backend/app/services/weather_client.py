"""
weather_client.py — OpenWeather adapter with construction-site alerts.

fetch(address) geocodes the project address, pulls current conditions and
the 3-hourly forecast, and returns:

    {"current": {...}, "forecast": [{...}, ...], "alerts": [...], "location": {...}}

``alerts`` mirrors ``current["alerts"]``. Any transport, HTTP or payload
failure raises ExternalServiceDegraded; callers skip the dependent rule.
"""
import logging
import math
from collections import OrderedDict
from typing import Any, Dict, List, Optional

import httpx

from app.config import (
    HTTP_TIMEOUTS, OPENWEATHER_API_KEY, OPENWEATHER_BASE_URL, WEATHER_ALERT_THRESHOLDS,
    WEATHER_FORECAST_DAYS,
)
from app.services.errors import ExternalServiceDegraded

logger = logging.getLogger("buildunion-weather")

T = WEATHER_ALERT_THRESHOLDS


def _round(x: float) -> int:
    return int(math.floor(x + 0.5))


def construction_alerts(reading: Dict[str, Any]) -> List[Dict[str, str]]:
    """Alert list for one reading (temp, feels_like, rain_1h, snow_1h, wind, visibility)."""
    alerts: List[Dict[str, str]] = []

    temp = reading.get("temp")
    if temp is not None and temp < T["frost_c"]:
        danger = temp < T["frost_danger_c"]
        alerts.append({
            "type": "frost",
            "severity": "danger" if danger else "warning",
            "message": "Extreme frost - all concrete/masonry work prohibited" if danger
            else "Frost conditions - protect concrete and materials",
        })

    feels_like = reading.get("feels_like")
    if feels_like is not None and feels_like > T["heat_feels_like_c"]:
        danger = feels_like > T["heat_danger_c"]
        alerts.append({
            "type": "heat",
            "severity": "danger" if danger else "warning",
            "message": "Extreme heat - mandatory rest breaks required" if danger
            else "High heat - ensure hydration and shade breaks",
        })

    rain = reading.get("rain_1h") or 0
    if rain > T["rain_mm_h"]:
        danger = rain > T["rain_danger_mm_h"]
        alerts.append({
            "type": "rain",
            "severity": "danger" if danger else "warning",
            "message": "Heavy rain - suspend outdoor work" if danger
            else "Moderate rain - protect materials and open excavations",
        })

    wind = reading.get("wind_speed") or 0
    gust = reading.get("wind_gust") or wind
    if gust > T["wind_gust_ms"]:
        danger = gust > T["wind_danger_ms"]
        alerts.append({
            "type": "wind",
            "severity": "danger" if danger else "warning",
            "message": "Dangerous winds - no crane operations, secure all materials" if danger
            else "High winds - secure loose materials and scaffolding",
        })

    snow = reading.get("snow_1h") or 0
    if snow > 0:
        danger = snow > T["snow_danger_mm_h"]
        alerts.append({
            "type": "snow",
            "severity": "danger" if danger else "warning",
            "message": "Heavy snowfall - clear access routes before work" if danger
            else "Snow conditions - slippery surfaces, use caution",
        })

    visibility = reading.get("visibility")
    if visibility and visibility < T["visibility_m"]:
        danger = visibility < T["visibility_danger_m"]
        alerts.append({
            "type": "low_visibility",
            "severity": "danger" if danger else "warning",
            "message": "Very poor visibility - suspend heavy equipment operations" if danger
            else "Reduced visibility - extra caution for vehicle movements",
        })

    return alerts


def parse_current(data: Dict[str, Any]) -> Dict[str, Any]:
    main = data["main"]
    wind = data.get("wind") or {}
    sky = (data.get("weather") or [{}])[0]
    current = {
        "temp": _round(main["temp"]),
        "feels_like": _round(main["feels_like"]),
        "humidity": main.get("humidity"),
        "wind_speed": wind.get("speed"),
        "wind_gust": wind.get("gust"),
        "description": sky.get("description"),
        "icon": sky.get("icon"),
        "rain_1h": (data.get("rain") or {}).get("1h"),
        "snow_1h": (data.get("snow") or {}).get("1h"),
        "visibility": data.get("visibility"),
        "pressure": main.get("pressure"),
        "clouds": (data.get("clouds") or {}).get("all"),
    }
    current["alerts"] = construction_alerts(current)
    return current


def parse_forecast(data: Dict[str, Any], days: int) -> List[Dict[str, Any]]:
    """Group 3-hourly entries by calendar day; one summary per day."""
    by_day: "OrderedDict[str, List[Dict]]" = OrderedDict()
    for item in data.get("list", []):
        by_day.setdefault(item["dt_txt"].split(" ")[0], []).append(item)

    forecast = []
    for day, items in by_day.items():
        if len(forecast) >= days:
            break
        temps = [i["main"]["temp"] for i in items]
        humidities = [i["main"]["humidity"] for i in items]
        winds = [i["wind"]["speed"] for i in items]
        pops = [i.get("pop", 0) for i in items]
        has_snow = any((i.get("snow") or {}).get("3h", 0) > 0 for i in items)
        midday = next((i for i in items if "12:00" in i["dt_txt"]), items[len(items) // 2])
        rain_prob = _round(max(pops) * 100)
        snow_prob = rain_prob if has_snow else 0
        entry = {
            "date": day,
            "temp_min": _round(min(temps)),
            "temp_max": _round(max(temps)),
            "humidity": _round(sum(humidities) / len(humidities)),
            "wind_speed": round(max(winds), 1),
            "description": midday["weather"][0]["description"],
            "icon": midday["weather"][0]["icon"],
            "rain_prob": rain_prob,
            "snow_prob": snow_prob,
        }
        # Forecast has no hourly rain/visibility: estimate from probabilities
        entry["alerts"] = construction_alerts({
            "temp": entry["temp_min"],
            "feels_like": entry["temp_max"],
            "rain_1h": 5 if rain_prob > 60 else 0,
            "snow_1h": 5 if snow_prob > 60 else 0,
            "wind_speed": entry["wind_speed"],
            "visibility": 10000,
        })
        forecast.append(entry)
    return forecast


class WeatherClient:
    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else OPENWEATHER_API_KEY
        self.base_url = (base_url or OPENWEATHER_BASE_URL).rstrip("/")
        self.timeout = timeout or HTTP_TIMEOUTS["weather"]
        self.transport = transport

    async def _get(self, client: httpx.AsyncClient, path: str, params: Dict[str, Any]) -> Any:
        r = await client.get(f"{self.base_url}{path}", params={**params, "appid": self.api_key})
        r.raise_for_status()
        try:
            return r.json()
        except ValueError as e:
            raise ExternalServiceDegraded("weather", f"non-JSON reply from {path}") from e

    @staticmethod
    def _coords(geo: Any, address: str) -> Dict[str, Any]:
        try:
            first = geo[0] if geo else None
            lat, lon = (first.get("lat"), first.get("lon")) if first else (None, None)
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            raise ExternalServiceDegraded("weather", f"unexpected geocode payload: {e}") from e
        if lat is None or lon is None:
            raise ExternalServiceDegraded("weather", f"could not geocode '{address}'")
        return {"lat": lat, "lon": lon, "units": "metric"}

    async def fetch(self, address: str, days: int = WEATHER_FORECAST_DAYS) -> Dict[str, Any]:
        if not self.api_key:
            raise ExternalServiceDegraded("weather", "OPENWEATHER_API_KEY not configured")
        if not address:
            raise ExternalServiceDegraded("weather", "no location")
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                geo = await self._get(client, "/geo/1.0/direct", {"q": address, "limit": 1})
                coords = self._coords(geo, address)
                current_data = await self._get(client, "/data/2.5/weather", coords)
                forecast_data = await self._get(client, "/data/2.5/forecast", coords)
        except httpx.HTTPError as e:
            logger.warning(f"Weather fetch failed: {e}")
            raise ExternalServiceDegraded("weather", str(e)) from e

        try:
            current = parse_current(current_data)
            forecast = parse_forecast(forecast_data, days)
            location = {
                "lat": coords["lat"],
                "lon": coords["lon"],
                "name": current_data.get("name"),
                "country": (current_data.get("sys") or {}).get("country"),
            }
        except (KeyError, IndexError, TypeError, ValueError, AttributeError) as e:
            raise ExternalServiceDegraded("weather", f"unexpected payload: {e}") from e

        return {
            "current": current,
            "forecast": forecast,
            "alerts": current["alerts"],
            "location": location,
        }
