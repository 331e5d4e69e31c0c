"""Weather lookup used by the daily UV advice sweep."""
import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 10.0


class WeatherClient:
    """Reads today's maximum UV index from an Open-Meteo compatible forecast API."""

    def __init__(
        self,
        api_url: str,
        latitude: float,
        longitude: float,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url
        self.latitude = latitude
        self.longitude = longitude
        self._transport = transport

    async def uv_index(self) -> Optional[float]:
        """Today's max UV index, or None when the lookup fails."""
        params = {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "daily": "uv_index_max",
            "forecast_days": 1,
            "timezone": "auto",
        }
        try:
            async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT, transport=self._transport) as client:
                response = await client.get(self.api_url, params=params)
                response.raise_for_status()
            values = response.json().get("daily", {}).get("uv_index_max") or []
        except httpx.TimeoutException:
            logger.warning("Weather lookup timed out")
            return None
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Weather lookup failed: {e}")
            return None

        if not values or values[0] is None:
            return None
        return float(values[0])


def build_weather_client(settings) -> Optional[WeatherClient]:
    """A client for the configured location, or None when no location is set."""
    if settings.weather_latitude is None or settings.weather_longitude is None:
        logger.info("Weather location not configured, UV advice disabled")
        return None
    return WeatherClient(settings.weather_api_url, settings.weather_latitude, settings.weather_longitude)
