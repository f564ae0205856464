import logging
import os
from datetime import timedelta

from flask import Flask, current_app, jsonify, request

from errors import ConfigurationError, ErrorClassifier, WeatherError
from forecast_cache import ForecastCache
from geocoding import GeocodingResolver, units_for_ip
from models import db
from rate_limiter import RateLimiter
from resolver import ForecastResolver, KeyedLocks
from weather_api import build_provider

logger = logging.getLogger(__name__)

_TRUE = {"1", "true", "yes", "on"}


# Reads the forecast settings from the environment, applying defaults.
def _load_config(app):
    env = os.environ
    app.config["SECRET_KEY"] = env.get("SECRET_KEY", "dev-secret")
    app.config["SQLALCHEMY_DATABASE_URI"] = env.get("DATABASE_URL", "sqlite:///forecasts.db")
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

    app.config["WEATHER_PROVIDER"] = env.get("WEATHER_PROVIDER", "weatherapi")
    app.config["WEATHERAPI_KEY"] = env.get("WEATHERAPI_KEY")
    app.config["OPENWEATHERMAP_API_KEY"] = env.get("OPENWEATHERMAP_API_KEY")
    app.config["FORECAST_CACHE_TTL"] = int(env.get("FORECAST_CACHE_TTL", 30))
    app.config["MAX_REQUESTS_PER_MINUTE"] = int(env.get("MAX_REQUESTS_PER_MINUTE", 60))
    app.config["WEATHER_REQUEST_TIMEOUT"] = float(env.get("WEATHER_REQUEST_TIMEOUT", 15))
    app.config["FORECAST_DAYS"] = int(env.get("FORECAST_DAYS", 5))
    app.config["RESOLVE_TIMEOUT"] = float(env.get("RESOLVE_TIMEOUT", 30))
    app.config["USE_GEOCODER"] = env.get("USE_GEOCODER", "false").strip().lower() in _TRUE
    app.config["LOG_LEVEL"] = env.get("LOG_LEVEL", "INFO").upper()


# App factory: wires config, database and the forecast pipeline, then registers routes.
def create_app(config=None):
    app = Flask(__name__)
    _load_config(app)
    if config:
        app.config.update(config)

    logging.basicConfig(
        level=app.config["LOG_LEVEL"],
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    db.init_app(app)
    with app.app_context():
        db.create_all()

    geocoder = None
    if app.config["USE_GEOCODER"]:
        geocoder = GeocodingResolver(timeout=app.config["WEATHER_REQUEST_TIMEOUT"])

    app.extensions["forecast"] = {
        "cache": ForecastCache(ttl=timedelta(minutes=app.config["FORECAST_CACHE_TTL"])),
        "rate_limiter": RateLimiter(app.config["MAX_REQUESTS_PER_MINUTE"]),
        "geocoder": geocoder,
        "classifier": ErrorClassifier(),
        "locks": KeyedLocks(),
        "resolver": None,
    }

    @app.route("/forecast", methods=["GET"])
    def forecast():
        address = request.args.get("address", "")
        classifier = _component("classifier")
        try:
            resolution = get_resolver().resolve(address)
        except WeatherError as exc:
            return _error_response(classifier.classify(exc, {"address": address, "ip": request.remote_addr}))
        if resolution is None:
            return _error_response(classifier.classify(None))

        body = resolution.to_dict()
        body["freshness"] = _component("cache").freshness(resolution.record).value
        body["units"] = _display_units()
        return jsonify(body)

    # Lists the newest stored forecasts.
    @app.route("/forecasts/recent", methods=["GET"])
    def recent():
        limit = request.args.get("limit", 10, type=int)
        limit = max(1, min(limit, 50))
        return jsonify([record.to_dict() for record in _component("cache").recent(limit)])

    return app


def _component(name):
    return current_app.extensions["forecast"][name]


def get_resolver() -> ForecastResolver:
    """
    The app's resolver, built on first use. A missing API key raises
    ConfigurationError here so every request reports it until fixed.
    """
    components = current_app.extensions["forecast"]
    if components["resolver"] is None:
        try:
            provider = build_provider(current_app.config)
        except ConfigurationError:
            logger.error("Weather provider %r is not configured", current_app.config.get("WEATHER_PROVIDER"))
            raise
        components["resolver"] = ForecastResolver(
            provider,
            components["cache"],
            components["rate_limiter"],
            geocoder=components["geocoder"],
            timeout=current_app.config["RESOLVE_TIMEOUT"],
            locks=components["locks"],
        )
    return components["resolver"]


def _display_units():
    units = (request.args.get("units") or "").lower()
    if units in ("metric", "imperial"):
        return units
    geocoder = _component("geocoder")
    if geocoder is None:
        return "metric"
    return units_for_ip(geocoder, request.remote_addr, _component("rate_limiter"))


def _error_response(classification):
    return jsonify(error=classification.kind.value, message=classification.message), classification.status


if __name__ == "__main__":
    app = create_app()
    app.run(debug=True)
