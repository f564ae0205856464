import re

POSTAL_CODE_RE = re.compile(r"^\d{5}(?:-\d{4})?$")
POSTAL_CODE_SEARCH_RE = re.compile(r"\b\d{5}(?:-\d{4})?\b")
CITY_CODE_RE = re.compile(r"^\s*([^,]*[a-z][^,]*?)\s*,\s*([a-z]{2})\s*$", re.IGNORECASE)
COORDINATES_RE = re.compile(r"^\s*(-?\d{1,3}(?:\.\d+)?)\s*,\s*(-?\d{1,3}(?:\.\d+)?)\s*$")
CITY_STATE_TAIL_RE = re.compile(
    r"(?:.*,\s*)?([a-z\s.]+?)(?:,\s*|\s+)([a-z]{2})(?:\s*\d{5}(?:-\d{4})?)?$", re.IGNORECASE
)
UNIT_RE = re.compile(r"(?:#|\bapt|\bunit|\bste|\bsuite)\s*[\w-]+", re.IGNORECASE)

COORDINATE_PRECISION = 4


# Returns True for a bare 5-digit (optionally +4) postal code.
def is_postal_code(text) -> bool:
    return bool(POSTAL_CODE_RE.match(text or ""))


def normalize(raw: str) -> str:
    """
    Turn raw user input into the cache lookup key.
    Postal codes are returned unchanged, "City, ST" collapses to "city,st",
    anything else is trimmed, lowercased and whitespace-collapsed.
    """
    raw = raw or ""
    if is_postal_code(raw):
        return raw
    match = CITY_CODE_RE.match(raw)
    if match:
        city = " ".join(match.group(1).split()).lower()
        return f"{city},{match.group(2).lower()}"
    return " ".join(raw.split()).lower()


# First postal code found anywhere in the text, or None.
def extract_postal_code(text: str | None) -> str | None:
    if not text:
        return None
    match = POSTAL_CODE_SEARCH_RE.search(str(text))
    return match.group(0) if match else None


def postal_code_from_location(data) -> str | None:
    """
    Pull a postal code out of a provider or geocoder location mapping.
    Looks at zip, postal_code, postcodes[0] and finally formatted_address.
    """
    if not isinstance(data, dict):
        return None
    for key in ("zip", "postal_code", "postcode"):
        if data.get(key):
            return str(data[key])
    postcodes = data.get("postcodes") or []
    if postcodes:
        return str(postcodes[0])
    return extract_postal_code(data.get("formatted_address"))


# Parses "lat,lon" into a float pair, or None when the text is not a coordinate pair.
def parse_coordinates(text):
    match = COORDINATES_RE.match(text or "")
    if not match:
        return None
    latitude, longitude = float(match.group(1)), float(match.group(2))
    if not (-90 <= latitude <= 90 and -180 <= longitude <= 180):
        return None
    return latitude, longitude


def format_coordinates(latitude, longitude) -> str:
    return f"{round(float(latitude), COORDINATE_PRECISION)},{round(float(longitude), COORDINATE_PRECISION)}"


def simplify_for_geocoding(address: str) -> str:
    """
    Reduce a full street address to something free-text geocoders resolve well.
    "1 Main St, Seattle, WA 98101" -> "seattle, wa, US"; otherwise street numbers
    and apartment/unit designators are dropped.
    """
    address = " ".join((address or "").split())
    match = CITY_STATE_TAIL_RE.match(address)
    if match and match.group(1).strip():
        city, state = match.group(1).strip(), match.group(2)
        return f"{city}, {state}, US"

    simplified = re.sub(r"^\d+\s+", "", address)
    simplified = UNIT_RE.sub("", simplified)
    simplified = re.sub(r",\s*usa$", ", US", simplified, flags=re.IGNORECASE)
    simplified = re.sub(r"\s+,", ",", simplified)
    return " ".join(simplified.split())
