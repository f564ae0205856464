import ipaddress
import logging
import threading
from dataclasses import dataclass

import requests

from address import format_coordinates, is_postal_code, postal_code_from_location

GEO_URL = "https://geocoding-api.open-meteo.com/v1/search"
IP_LOOKUP_URL = "http://ip-api.com/json/{ip}"

IMPERIAL_UNIT_COUNTRIES = {"US", "LR", "MM"}
IP_LOOKUP_SERVICE = "ip-lookup"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Location:
    """Best-effort location record returned by the geocoder."""

    postal_code: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    city: str | None = None
    region_code: str | None = None
    country: str | None = None
    country_code: str | None = None
    timezone: str | None = None

    @property
    def coordinates(self):
        if self.latitude is None or self.longitude is None:
            return None
        return self.latitude, self.longitude


# Normalizes strings for case-insensitive comparisons.
def _norm(string):
    return (string or "").strip().lower()


def best_query(location: Location | None, fallback: str) -> str:
    """
    Choose the most precise lookup string a location offers:
    postal code > coordinate pair > city+region > city+country > fallback.
    """
    if location is None:
        return fallback
    if location.postal_code:
        return location.postal_code
    if location.coordinates:
        return format_coordinates(*location.coordinates)
    if location.city and location.region_code:
        return f"{location.city}, {location.region_code}"
    if location.city and location.country:
        return f"{location.city}, {location.country}"
    return fallback


class GeocodingResolver:
    """Open-Meteo geocoding search plus IP-to-country lookup. Never raises to its caller."""

    def __init__(self, session=None, timeout: float = 15, count: int = 5):
        self.session = session or requests.Session()
        self.timeout = timeout
        self.count = count
        self._countries: dict[str, str] = {}
        self._countries_lock = threading.Lock()

    # Queries the geocoding API and returns candidate locations, optionally filtered by region.
    def search(self, text: str, region: str | None = None) -> list[Location]:
        if not _norm(text):
            return []
        params = {"name": text, "count": self.count, "language": "en", "format": "json"}
        if is_postal_code(text):
            params["countryCode"] = "US"
        try:
            response = self.session.get(GEO_URL, params=params, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as exc:
            logger.error("Geocoding request failed for %r: %s", text, exc)
            return []
        results = (data.get("results") if isinstance(data, dict) else None) or []

        if region:
            want = _norm(region)
            filtered = [r for r in results if want and want in _norm(r.get("admin1"))]
            if filtered:
                results = filtered

        locations = []
        for result in results:
            locations.append(Location(
                postal_code=postal_code_from_location(result),
                latitude=result.get("latitude"),
                longitude=result.get("longitude"),
                city=result.get("name"),
                region_code=result.get("admin1"),
                country=result.get("country"),
                country_code=result.get("country_code"),
                timezone=result.get("timezone"),
            ))
        return locations

    def locate(self, text: str) -> Location | None:
        results = self.search(text)
        return results[0] if results else None

    def reverse(self, ip: str | None) -> str | None:
        """Country code for a public IP address; None for local/private or unknown addresses."""
        if is_local_ip(ip):
            return None
        try:
            response = self.session.get(
                IP_LOOKUP_URL.format(ip=ip),
                params={"fields": "status,countryCode"},
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as exc:
            logger.error("IP lookup failed for %s: %s", ip, exc)
            return None
        if not isinstance(data, dict) or data.get("status") != "success":
            return None
        country_code = data.get("countryCode")
        if country_code:
            with self._countries_lock:
                self._countries[ip] = country_code
        return country_code

    def known_country(self, ip: str | None) -> str | None:
        """Country code from an earlier successful lookup, without touching the network."""
        with self._countries_lock:
            return self._countries.get(ip)


def is_local_ip(ip) -> bool:
    if not ip or _norm(ip) == "localhost":
        return True
    try:
        address = ipaddress.ip_address(ip.strip())
    except ValueError:
        return True
    return address.is_private or address.is_loopback or address.is_link_local


# Display-unit hint for the presentation layer; storage stays Celsius.
# Lookups for unseen IPs spend the "ip-lookup" rate budget; over budget falls back to metric.
def units_for_ip(geocoder: GeocodingResolver, ip: str | None, rate_limiter=None) -> str:
    if is_local_ip(ip):
        return "metric"
    country_code = geocoder.known_country(ip)
    if country_code is None:
        if rate_limiter is not None and not rate_limiter.admit(IP_LOOKUP_SERVICE):
            return "metric"
        country_code = geocoder.reverse(ip)
    return "imperial" if country_code in IMPERIAL_UNIT_COUNTRIES else "metric"
