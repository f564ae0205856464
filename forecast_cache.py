import enum
import json
import logging
from datetime import timedelta

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from address import is_postal_code
from models import ForecastRecord, db, utcnow
from transform import CanonicalWeather, serialize_daily

DEFAULT_TTL = timedelta(minutes=30)
FRESH_WINDOW = timedelta(minutes=1)

logger = logging.getLogger(__name__)


class Freshness(enum.Enum):
    FRESH = "fresh"
    CACHED = "cached"
    STALE = "stale"


def classify_freshness(queried_at, now, ttl=DEFAULT_TTL) -> Freshness:
    age = now - queried_at
    if age >= ttl:
        return Freshness.STALE
    if age < FRESH_WINDOW:
        return Freshness.FRESH
    return Freshness.CACHED


class ForecastCache:
    """
    Forecast records in the relational store, looked up by normalized key.

    Records are append-only: a stale record is superseded by a newer one with
    the same key, never updated or deleted.
    """

    def __init__(self, ttl: timedelta = DEFAULT_TTL, clock=utcnow, session=None):
        self.ttl = ttl
        self.clock = clock
        self._session = session

    @property
    def session(self):
        return self._session if self._session is not None else db.session

    def _matching(self, key):
        # Postal codes also match records whose postal code came from the provider.
        if is_postal_code(key):
            return or_(ForecastRecord.normalized_key == key, ForecastRecord.postal_code == key)
        return ForecastRecord.normalized_key == key

    def lookup(self, key: str) -> ForecastRecord | None:
        """Most recent non-stale record for the key; a stale match counts as a miss."""
        if not key:
            return None
        cutoff = self.clock() - self.ttl
        return (
            self.session.query(ForecastRecord)
            .filter(self._matching(key), ForecastRecord.queried_at > cutoff)
            .order_by(ForecastRecord.queried_at.desc(), ForecastRecord.id.desc())
            .first()
        )

    def latest(self, key: str) -> ForecastRecord | None:
        """Most recent record for the key regardless of age."""
        if not key:
            return None
        return (
            self.session.query(ForecastRecord)
            .filter(self._matching(key))
            .order_by(ForecastRecord.queried_at.desc(), ForecastRecord.id.desc())
            .first()
        )

    def recent(self, limit: int = 10):
        return (
            self.session.query(ForecastRecord)
            .order_by(ForecastRecord.queried_at.desc(), ForecastRecord.id.desc())
            .limit(limit)
            .all()
        )

    def build_record(self, raw_address: str, key: str, weather: CanonicalWeather, postal_code=None):
        today = weather.today
        return ForecastRecord(
            raw_address=raw_address,
            normalized_key=key,
            postal_code=postal_code,
            current_temp_c=weather.current.temperature_celsius,
            high_temp_c=today.high_celsius,
            low_temp_c=today.low_celsius,
            conditions=weather.current.condition_text,
            extended_forecast=json.dumps(serialize_daily(weather.daily_forecast)),
            location_name=weather.location.name,
            country=weather.location.country,
            timezone=weather.location.timezone,
            queried_at=self.clock(),
        )

    def store(self, record: ForecastRecord) -> ForecastRecord:
        if record.queried_at is None:
            record.queried_at = self.clock()
        self.session.add(record)
        try:
            self.session.commit()
        except IntegrityError:
            # Same postal code fetched at the same instant by another writer.
            self.session.rollback()
            existing = (
                self.session.query(ForecastRecord)
                .filter_by(postal_code=record.postal_code, queried_at=record.queried_at)
                .first()
            )
            if existing is None:
                raise
            logger.warning("Duplicate forecast for %s at %s, keeping existing", record.postal_code, record.queried_at)
            return existing
        logger.info("Stored forecast %s for %s", record.id, record.normalized_key)
        return record

    def freshness(self, record: ForecastRecord) -> Freshness:
        return classify_freshness(record.queried_at, self.clock(), self.ttl)
