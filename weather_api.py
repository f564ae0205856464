import logging
import time
from datetime import date

import requests

from address import is_postal_code, parse_coordinates, simplify_for_geocoding
from errors import (
    AuthenticationError,
    ConfigurationError,
    MalformedResponseError,
    RateLimitExceeded,
    UpstreamError,
    UpstreamTimeoutError,
)
from transform import (
    MAX_FORECAST_DAYS,
    CanonicalWeather,
    OpenWeatherMapResponse,
    WeatherApiResponse,
    clamp_days,
    forecast_dates,
    transform,
)

WEATHERAPI_URL = "https://api.weatherapi.com/v1"
OPENWEATHERMAP_URL = "https://api.openweathermap.org/data/2.5"
OPENWEATHERMAP_GEO_URL = "https://api.openweathermap.org/geo/1.0"

DEFAULT_TIMEOUT = 15
# WeatherAPI.com answers 400 with this code when q matches nothing.
WEATHERAPI_NO_LOCATION = 1006

logger = logging.getLogger(__name__)


class ProviderClient:
    """
    Base class for upstream weather providers.

    fetch(query) returns a CanonicalWeather, None when the location cannot be
    resolved, or raises one of the errors.WeatherError subclasses. No requests
    exception leaves this class.
    """

    service_name = "provider"

    def __init__(self, api_key: str | None = None, session=None, timeout: float = DEFAULT_TIMEOUT):
        self.api_key = api_key
        self.session = session or requests.Session()
        self.timeout = timeout

    def fetch(self, query: str, deadline: float | None = None) -> CanonicalWeather | None:
        raise NotImplementedError

    # Per-call timeout bounded by whatever is left of the caller's deadline.
    def _timeout_for(self, deadline):
        if deadline is None:
            return self.timeout
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise UpstreamTimeoutError(f"{self.service_name}: deadline exceeded before request", status=408)
        return min(self.timeout, remaining)

    def _get(self, url: str, params: dict, deadline=None):
        timeout = self._timeout_for(deadline)
        logger.debug("GET %s params=%s", url, {k: v for k, v in params.items() if k not in ("key", "appid")})
        try:
            response = self.session.get(url, params=params, timeout=timeout)
        except (requests.Timeout, requests.ConnectionError) as exc:
            logger.error("%s request failed: %s", self.service_name, exc)
            raise UpstreamTimeoutError(f"{self.service_name}: request timed out after {timeout}s", status=408) from exc
        except requests.RequestException as exc:
            logger.error("%s request failed: %s", self.service_name, exc)
            raise UpstreamError(f"{self.service_name}: request failed: {exc}") from exc
        self._check_status(response)
        try:
            return response.json()
        except ValueError as exc:
            logger.error("%s returned a non-JSON body", self.service_name)
            raise MalformedResponseError(f"{self.service_name}: invalid JSON") from exc

    def _check_status(self, response):
        status = response.status_code
        if status < 400:
            return
        if status in (401, 403):
            logger.error("%s rejected credentials: HTTP %s", self.service_name, status)
            raise AuthenticationError(f"{self.service_name}: authentication failed", status=status)
        if status == 429:
            logger.warning("%s quota exceeded", self.service_name)
            raise RateLimitExceeded(f"{self.service_name}: rate limit exceeded", status=status)
        logger.error("%s returned HTTP %s", self.service_name, status)
        raise UpstreamError(f"{self.service_name}: HTTP {status}", status=status, body=_safe_json(response))


class WeatherApiClient(ProviderClient):
    """WeatherAPI.com: one call returns location, current conditions and the N-day forecast."""

    service_name = "weatherapi"

    def __init__(self, api_key, session=None, timeout=DEFAULT_TIMEOUT, days=MAX_FORECAST_DAYS):
        if not api_key:
            raise ConfigurationError("WeatherAPI key is missing")
        super().__init__(api_key, session=session, timeout=timeout)
        self.days = clamp_days(days)

    @staticmethod
    def format_query(query: str) -> str:
        # Bare US ZIP codes are otherwise matched worldwide.
        if is_postal_code(query):
            return f"{query},us"
        return query

    def fetch(self, query, deadline=None):
        params = {"q": self.format_query(query), "days": self.days, "aqi": "no", "key": self.api_key}
        try:
            payload = self._get(f"{WEATHERAPI_URL}/forecast.json", params, deadline)
        except UpstreamError as exc:
            if exc.status == 400 and self._no_location(exc):
                logger.info("weatherapi found no location for %r", query)
                return None
            raise
        return transform(WeatherApiResponse(payload, self.days))

    @staticmethod
    def _no_location(exc):
        error = exc.body.get("error")
        return isinstance(error, dict) and error.get("code") == WEATHERAPI_NO_LOCATION


class OpenWeatherMapClient(ProviderClient):
    """
    OpenWeatherMap: geocode the query to coordinates, then fetch current
    weather and the 5-day forecast by coordinate pair, always in metric units.
    """

    service_name = "openweathermap"

    def __init__(self, api_key, session=None, timeout=DEFAULT_TIMEOUT):
        if not api_key:
            raise ConfigurationError("OpenWeatherMap API key is missing")
        super().__init__(api_key, session=session, timeout=timeout)

    def fetch(self, query, deadline=None):
        geocode = self.geocode(query, deadline)
        if not geocode or geocode.get("lat") is None or geocode.get("lon") is None:
            logger.warning("openweathermap could not resolve coordinates for %r", query)
            return None

        params = {"lat": geocode["lat"], "lon": geocode["lon"], "units": "metric", "appid": self.api_key}
        current = self._get(f"{OPENWEATHERMAP_URL}/weather", dict(params), deadline)
        forecast = self._get(f"{OPENWEATHERMAP_URL}/forecast", dict(params), deadline)
        return transform(OpenWeatherMapResponse(geocode, current, forecast))

    def geocode(self, query: str, deadline=None):
        """Coordinates for the query as a geocoding record (lat, lon, name, ...), or None."""
        query = (query or "").strip()
        coordinates = parse_coordinates(query)
        if coordinates:
            return {"lat": coordinates[0], "lon": coordinates[1]}

        if is_postal_code(query):
            zip_code = query[:5]
            try:
                result = self._get(
                    f"{OPENWEATHERMAP_GEO_URL}/zip", {"zip": zip_code, "country": "US", "appid": self.api_key}, deadline
                )
            except UpstreamError as exc:
                if exc.status == 404:
                    return None
                raise
            return result if isinstance(result, dict) else None

        simplified = simplify_for_geocoding(query)
        result = self._direct(simplified, deadline)
        if result is None and simplified != query:
            logger.info("No geocoding results for %r, retrying with %r", simplified, query)
            result = self._direct(query, deadline)
        return result

    def _direct(self, text, deadline):
        results = self._get(f"{OPENWEATHERMAP_GEO_URL}/direct", {"q": text, "limit": 1, "appid": self.api_key}, deadline)
        if isinstance(results, list) and results and isinstance(results[0], dict):
            return results[0]
        return None


class MockWeatherClient(ProviderClient):
    """Deterministic WeatherAPI-shaped data derived from the query; no network."""

    service_name = "mock"

    def __init__(self, days=MAX_FORECAST_DAYS, today=None):
        self.api_key = None
        self.session = None
        self.timeout = DEFAULT_TIMEOUT
        self.days = clamp_days(days)
        self._today = today or date.today

    def fetch(self, query, deadline=None):
        self._timeout_for(deadline)
        seed = sum(map(ord, query or ""))
        base = seed % 15 + 15
        conditions = ["Sunny", "Partly cloudy", "Cloudy", "Light rain", "Overcast"]
        payload = {
            "location": {
                "name": (query or "").split(",")[0].strip().title() or "Sample Location",
                "region": "",
                "country": "United States of America",
                "lat": 34.0 + seed % 10,
                "lon": -118.0 - seed % 10,
                "tz_id": "America/Los_Angeles",
            },
            "current": {"temp_c": base, "condition": {"text": conditions[seed % 5], "code": 1000 + seed % 30}},
            "forecast": {
                "forecastday": [
                    {
                        "date": day.isoformat(),
                        "day": {
                            "maxtemp_c": base + offset + 5,
                            "mintemp_c": base + offset - 5,
                            "condition": {"text": conditions[(seed + offset) % 5]},
                        },
                    }
                    for offset, day in enumerate(forecast_dates(self._today(), self.days))
                ]
            },
        }
        return transform(WeatherApiResponse(payload, self.days))


PROVIDERS = ("weatherapi", "openweathermap", "mock")


def build_provider(config, session=None) -> ProviderClient:
    """Construct the statically configured provider from a Flask-style config mapping."""
    name = (config.get("WEATHER_PROVIDER") or "weatherapi").strip().lower()
    timeout = float(config.get("WEATHER_REQUEST_TIMEOUT") or DEFAULT_TIMEOUT)
    days = int(config.get("FORECAST_DAYS") or MAX_FORECAST_DAYS)
    if name == "weatherapi":
        return WeatherApiClient(config.get("WEATHERAPI_KEY"), session=session, timeout=timeout, days=days)
    if name == "openweathermap":
        return OpenWeatherMapClient(config.get("OPENWEATHERMAP_API_KEY"), session=session, timeout=timeout)
    if name == "mock":
        return MockWeatherClient(days=days)
    raise ConfigurationError(f"Unknown weather provider '{name}', expected one of {', '.join(PROVIDERS)}")


def _safe_json(response):
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}
