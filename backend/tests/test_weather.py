"""Tests for the UV index lookup."""
import httpx

from glownotify.config import Settings
from glownotify.services.weather import WeatherClient, build_weather_client


def _client(handler):
    return WeatherClient(
        "https://weather.test/v1/forecast", -31.95, 115.86, transport=httpx.MockTransport(handler)
    )


async def test_reads_todays_max_uv():
    seen = {}

    def handler(request):
        seen.update(request.url.params)
        return httpx.Response(200, json={"daily": {"time": ["2024-06-12"], "uv_index_max": [8.35]}})

    assert await _client(handler).uv_index() == 8.35
    assert seen["daily"] == "uv_index_max"
    assert seen["latitude"] == "-31.95"


async def test_http_error_returns_none():
    assert await _client(lambda request: httpx.Response(503)).uv_index() is None


async def test_missing_values_return_none():
    def handler(request):
        return httpx.Response(200, json={"daily": {"uv_index_max": []}})

    assert await _client(handler).uv_index() is None


def test_no_location_means_no_client():
    assert build_weather_client(Settings(weather_latitude=None, weather_longitude=None)) is None
    client = build_weather_client(Settings(weather_latitude=1.5, weather_longitude=2.5))
    assert isinstance(client, WeatherClient)
    assert (client.latitude, client.longitude) == (1.5, 2.5)
