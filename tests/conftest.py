from datetime import date, datetime, timedelta

import pytest
import requests

from app import create_app
from forecast_cache import ForecastCache
from models import db
from rate_limiter import RateLimiter


# Creates a Flask app with a temporary SQLite database and the offline mock provider.
@pytest.fixture()
def app(tmp_path, monkeypatch):
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{db_path}")
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("WEATHER_PROVIDER", "mock")
    monkeypatch.delenv("USE_GEOCODER", raising=False)
    app = create_app()
    app.config.update(TESTING=True)
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()


@pytest.fixture()
def client(app):
    return app.test_client()


class FakeClock:
    """Settable naive-UTC clock."""

    def __init__(self, now=None):
        self.now = now or datetime(2025, 4, 10, 12, 0, 30)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def cache(app, clock):
    return ForecastCache(ttl=timedelta(minutes=30), clock=clock)


@pytest.fixture()
def limiter(clock):
    return RateLimiter(max_requests_per_minute=60, clock=clock)


class FakeResponse:
    def __init__(self, json_data, status_code=200):
        self._json = json_data
        self.status_code = status_code

    def json(self):
        if isinstance(self._json, Exception):
            raise self._json
        return self._json

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}")


class FakeSession:
    """Stands in for requests.Session: routes GETs by URL substring and records every call."""

    def __init__(self, routes=None):
        self.routes = routes or {}
        self.calls = []

    def get(self, url, params=None, timeout=None, **kwargs):
        self.calls.append({"url": url, "params": dict(params or {}), "timeout": timeout})
        for fragment, result in self.routes.items():
            if fragment in url:
                if isinstance(result, Exception):
                    raise result
                if callable(result):
                    return result(url, params or {})
                return result
        return FakeResponse({"message": "not found"}, status_code=404)


def weatherapi_payload(days=5, start=date(2025, 4, 10), name="San Francisco", region="California"):
    return {
        "location": {
            "name": name,
            "region": region,
            "country": "United States of America",
            "lat": 37.78,
            "lon": -122.42,
            "tz_id": "America/Los_Angeles",
        },
        "current": {"temp_c": 17.5, "temp_f": 63.5, "condition": {"text": "Partly cloudy", "code": 1003}},
        "forecast": {
            "forecastday": [
                {
                    "date": (start + timedelta(days=offset)).isoformat(),
                    "day": {
                        "maxtemp_c": 20.4 + offset,
                        "mintemp_c": 11.6 + offset,
                        "condition": {"text": "Sunny"},
                    },
                }
                for offset in range(days)
            ]
        },
    }
