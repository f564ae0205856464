"""
Canonical weather schema and the pure mapping from each provider's payload into it.

Both providers are queried in metric units, so values are copied, never converted.
Anything missing or non-numeric in a required field raises MalformedResponseError;
a partially populated CanonicalWeather is never returned.
"""
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from functools import singledispatch

from errors import MalformedResponseError

MIN_FORECAST_DAYS = 3
MAX_FORECAST_DAYS = 5


@dataclass(frozen=True)
class LocationInfo:
    name: str | None
    region: str | None
    country: str | None
    latitude: float | None
    longitude: float | None
    timezone: str | None
    postal_code: str | None = None


@dataclass(frozen=True)
class CurrentConditions:
    temperature_celsius: int
    condition_text: str
    condition_code: int


@dataclass(frozen=True)
class DailyForecast:
    date: date
    high_celsius: int
    low_celsius: int
    condition_text: str

    def to_dict(self):
        return {
            "date": self.date.isoformat(),
            "high_celsius": self.high_celsius,
            "low_celsius": self.low_celsius,
            "condition_text": self.condition_text,
        }

    @classmethod
    def from_dict(cls, data):
        return cls(
            date=date.fromisoformat(data["date"]),
            high_celsius=int(data["high_celsius"]),
            low_celsius=int(data["low_celsius"]),
            condition_text=data.get("condition_text") or "",
        )


@dataclass(frozen=True)
class CanonicalWeather:
    location: LocationInfo
    current: CurrentConditions
    daily_forecast: tuple[DailyForecast, ...] = field(default_factory=tuple)

    @property
    def today(self) -> DailyForecast:
        return self.daily_forecast[0]


# Provider responses: one variant per upstream contract, each carrying its own raw payload.

@dataclass(frozen=True)
class WeatherApiResponse:
    """Single-call provider: location + current + forecast in one body."""

    payload: dict
    days: int = MAX_FORECAST_DAYS


@dataclass(frozen=True)
class OpenWeatherMapResponse:
    """Two-call provider: geocoding hit, then current weather and 5-day/3-hour forecast."""

    geocode: dict
    current: dict
    forecast: dict


def celsius(value) -> int:
    """Round a metric temperature half away from zero."""
    if value is None or isinstance(value, bool):
        raise MalformedResponseError(f"invalid temperature: {value!r}")
    try:
        return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    except (InvalidOperation, ValueError) as exc:
        raise MalformedResponseError(f"invalid temperature: {value!r}") from exc


def _code(value) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError) as exc:
        raise MalformedResponseError(f"invalid condition code: {value!r}") from exc


def _section(data, key):
    value = data.get(key) if isinstance(data, dict) else None
    if not isinstance(value, dict):
        raise MalformedResponseError(f"response missing '{key}'")
    return value


def _optional_section(data, key):
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise MalformedResponseError(f"'{key}' is not an object")
    return value


def _ascending(days):
    days = sorted(days, key=lambda d: d.date)
    for earlier, later in zip(days, days[1:]):
        if earlier.date == later.date:
            raise MalformedResponseError(f"duplicate forecast day {later.date}")
    return tuple(days)


@singledispatch
def transform(response) -> CanonicalWeather:
    raise MalformedResponseError(f"unsupported provider response: {type(response).__name__}")


@transform.register
def _(response: WeatherApiResponse) -> CanonicalWeather:
    data = response.payload
    location = _section(data, "location")
    current = _section(data, "current")
    forecast = _section(data, "forecast")
    condition = _optional_section(current, "condition")

    forecast_days = forecast.get("forecastday") or []
    if not isinstance(forecast_days, list):
        raise MalformedResponseError("'forecastday' is not a list")

    days = []
    for entry in forecast_days:
        if not isinstance(entry, dict):
            raise MalformedResponseError("forecast day is not an object")
        day = _optional_section(entry, "day")
        try:
            forecast_date = date.fromisoformat(entry["date"])
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedResponseError("forecast day without a valid date") from exc
        days.append(DailyForecast(
            date=forecast_date,
            high_celsius=celsius(day.get("maxtemp_c")),
            low_celsius=celsius(day.get("mintemp_c")),
            condition_text=_optional_section(day, "condition").get("text") or "",
        ))
    if not days:
        raise MalformedResponseError("forecast has no days")

    return CanonicalWeather(
        location=LocationInfo(
            name=location.get("name"),
            region=location.get("region"),
            country=location.get("country"),
            latitude=location.get("lat"),
            longitude=location.get("lon"),
            timezone=location.get("tz_id"),
        ),
        current=CurrentConditions(
            temperature_celsius=celsius(current.get("temp_c")),
            condition_text=condition.get("text") or "",
            condition_code=_code(condition.get("code")),
        ),
        daily_forecast=_ascending(days)[:response.days],
    )


def timezone_name(offset_seconds) -> str | None:
    """OpenWeatherMap reports a UTC offset in seconds; whole hours map to Etc/GMT zones."""
    if offset_seconds is None:
        return None
    offset_seconds = int(offset_seconds)
    if offset_seconds % 3600 == 0:
        hours = offset_seconds // 3600
        return f"Etc/GMT{'-' if hours > 0 else '+'}{abs(hours)}"
    sign = "+" if offset_seconds >= 0 else "-"
    minutes = abs(offset_seconds) // 60
    return f"UTC{sign}{minutes // 60:02d}:{minutes % 60:02d}"


def _weather_entry(data):
    weather = data.get("weather") or []
    if not isinstance(weather, list) or not weather or not isinstance(weather[0], dict):
        raise MalformedResponseError("response missing 'weather'")
    return weather[0]


@transform.register
def _(response: OpenWeatherMapResponse) -> CanonicalWeather:
    current = response.current
    geocode = response.geocode or {}
    if not isinstance(geocode, dict):
        raise MalformedResponseError("geocoding result is not an object")
    main = _section(current, "main")
    weather = _weather_entry(current)

    entries = response.forecast.get("list") if isinstance(response.forecast, dict) else None
    if not entries:
        raise MalformedResponseError("forecast has no entries")
    if not isinstance(entries, list):
        raise MalformedResponseError("'list' is not a list")
    city = _optional_section(response.forecast, "city")
    offset = city.get("timezone", current.get("timezone")) or 0

    # 3-hour slots grouped by local calendar day.
    grouped = {}
    for entry in entries:
        try:
            local = datetime.fromtimestamp(int(entry["dt"]) + int(offset), tz=timezone.utc)
        except (KeyError, TypeError, ValueError, OverflowError, OSError) as exc:
            raise MalformedResponseError("forecast entry without a valid timestamp") from exc
        slot_main = _section(entry, "main")
        grouped.setdefault(local.date(), []).append((
            celsius(slot_main.get("temp_max", slot_main.get("temp"))),
            celsius(slot_main.get("temp_min", slot_main.get("temp"))),
            _weather_entry(entry).get("description") or "",
        ))

    days = []
    for forecast_date, slots in grouped.items():
        conditions = Counter(text for _, _, text in slots)
        days.append(DailyForecast(
            date=forecast_date,
            high_celsius=max(high for high, _, _ in slots),
            low_celsius=min(low for _, low, _ in slots),
            condition_text=conditions.most_common(1)[0][0],
        ))

    coord = _optional_section(current, "coord")
    system = _optional_section(current, "sys")
    return CanonicalWeather(
        location=LocationInfo(
            name=geocode.get("name") or current.get("name") or city.get("name"),
            region=geocode.get("state"),
            country=geocode.get("country") or system.get("country") or city.get("country"),
            latitude=geocode.get("lat", coord.get("lat")),
            longitude=geocode.get("lon", coord.get("lon")),
            timezone=timezone_name(offset),
            postal_code=geocode.get("zip"),
        ),
        current=CurrentConditions(
            temperature_celsius=celsius(main.get("temp")),
            condition_text=weather.get("description") or weather.get("main") or "",
            condition_code=_code(weather.get("id")),
        ),
        daily_forecast=_ascending(days)[:MAX_FORECAST_DAYS],
    )


def clamp_days(days) -> int:
    return max(MIN_FORECAST_DAYS, min(MAX_FORECAST_DAYS, int(days)))


# Stored form of the daily forecast: a plain list of dicts, dates as ISO strings.
def serialize_daily(daily_forecast):
    return [day.to_dict() for day in daily_forecast]


def deserialize_daily(items):
    return tuple(DailyForecast.from_dict(item) for item in items or [])


def forecast_dates(start: date, count: int):
    return [start + timedelta(days=offset) for offset in range(count)]
