from conftest import FakeResponse, FakeSession
from geocoding import GeocodingResolver
from models import ForecastRecord
from rate_limiter import RateLimiter


def test_forecast_for_zip_code(app, client):
    r = client.get("/forecast?address=98101")
    assert r.status_code == 200
    body = r.get_json()
    assert body["postal_code"] == "98101"
    assert body["normalized_key"] == "98101"
    assert len(body["daily_forecast"]) == 5
    assert body["freshness"] == "fresh"
    assert body["units"] == "metric"
    assert ForecastRecord.query.count() == 1


def test_second_request_is_served_from_cache(app, client):
    first = client.get("/forecast?address=Seattle, WA").get_json()
    second = client.get("/forecast?address=seattle,  wa").get_json()
    assert second["id"] == first["id"]
    assert second["from_cache"] is True
    assert ForecastRecord.query.count() == 1


def test_blank_address_is_rejected(client):
    r = client.get("/forecast?address=%20%20")
    assert r.status_code == 422
    assert r.get_json()["error"] == "validation"

    assert client.get("/forecast").status_code == 422


def test_explicit_units_are_echoed(client):
    r = client.get("/forecast?address=98101&units=imperial")
    assert r.get_json()["units"] == "imperial"


def test_missing_api_key_reports_configuration_error(app, client):
    app.config.update(WEATHER_PROVIDER="weatherapi", WEATHERAPI_KEY=None)
    for _ in range(2):
        r = client.get("/forecast?address=98101")
        assert r.status_code == 503
        assert r.get_json()["error"] == "configuration"
    assert ForecastRecord.query.count() == 0


def test_rate_limit_is_reported(app, client):
    app.extensions["forecast"]["rate_limiter"] = RateLimiter(max_requests_per_minute=0)
    r = client.get("/forecast?address=98101")
    assert r.status_code == 429
    assert r.get_json()["error"] == "rate_limited"


def test_unknown_location_is_not_found(app, client):
    class NowhereProvider:
        service_name = "mock"

        def fetch(self, query, deadline=None):
            return None

    from resolver import ForecastResolver

    components = app.extensions["forecast"]
    components["resolver"] = ForecastResolver(NowhereProvider(), components["cache"], components["rate_limiter"])
    r = client.get("/forecast?address=Atlantis")
    assert r.status_code == 404
    assert r.get_json()["error"] == "not_found"


def test_recent_forecasts_newest_first(client):
    client.get("/forecast?address=Seattle, WA")
    client.get("/forecast?address=Portland, OR")

    r = client.get("/forecasts/recent?limit=1")
    assert r.status_code == 200
    assert [f["normalized_key"] for f in r.get_json()] == ["portland,or"]

    keys = {f["normalized_key"] for f in client.get("/forecasts/recent?limit=500").get_json()}
    assert keys == {"seattle,wa", "portland,or"}


def test_display_units_lookup_happens_once_per_ip(app, client):
    session = FakeSession({"ip-api.com": FakeResponse({"status": "success", "countryCode": "US"})})
    app.extensions["forecast"]["geocoder"] = GeocodingResolver(session=session)

    for _ in range(3):
        r = client.get("/forecast?address=98101", environ_base={"REMOTE_ADDR": "8.8.8.8"})
        assert r.get_json()["units"] == "imperial"
    assert len([c for c in session.calls if "ip-api.com" in c["url"]]) == 1
