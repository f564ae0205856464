import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass

from address import extract_postal_code, is_postal_code, normalize
from errors import RateLimitExceeded, UpstreamTimeoutError, ValidationError
from geocoding import best_query
from models import MAX_ADDRESS_LENGTH, ForecastRecord

DEFAULT_RESOLVE_TIMEOUT = 30

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Resolution:
    """A resolved forecast and whether this call was served from the cache."""

    record: ForecastRecord
    from_cache: bool = False

    def to_dict(self):
        return self.record.to_dict(from_cache=self.from_cache)


class KeyedLocks:
    """One lock per key, dropped again once nobody holds or waits on it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = {}

    @contextmanager
    def hold(self, key, timeout=None):
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        lock = entry[0]
        acquired = lock.acquire(timeout=-1 if timeout is None else max(timeout, 0))
        try:
            yield acquired
        finally:
            if acquired:
                lock.release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self):
        with self._guard:
            return len(self._locks)


def lookup_key(raw_address: str) -> str:
    """Postal code when one is present anywhere in the address, else the normalized text."""
    return extract_postal_code(raw_address) or normalize(raw_address)


class ForecastResolver:
    """
    Resolve-or-fetch for a free-form location.

    normalize -> cache lookup -> (miss) per-key lock -> cache re-check ->
    rate-limit gate -> provider fetch -> persist. Concurrent callers for the
    same key share one upstream fetch; a caller that cannot get the key lock
    before its deadline falls back to the newest stored record, stale or not.
    """

    def __init__(self, provider, cache, rate_limiter, geocoder=None, timeout=DEFAULT_RESOLVE_TIMEOUT, locks=None):
        self.provider = provider
        self.cache = cache
        self.rate_limiter = rate_limiter
        self.geocoder = geocoder
        self.timeout = timeout
        self.locks = locks if locks is not None else KeyedLocks()

    def resolve(self, raw_address, timeout=None):
        if raw_address is None or not str(raw_address).strip():
            raise ValidationError("address must not be blank")
        raw_address = str(raw_address).strip()
        if len(raw_address) > MAX_ADDRESS_LENGTH:
            raise ValidationError(f"address must be at most {MAX_ADDRESS_LENGTH} characters")
        timeout = self.timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout if timeout else None

        key = lookup_key(raw_address)
        record = self.cache.lookup(key)
        if record is not None:
            logger.info("Cache hit for %s (record %s)", key, record.id)
            return Resolution(record, from_cache=True)
        logger.info("Cache miss for %s", key)

        with self.locks.hold(key, self._remaining(deadline)) as acquired:
            if not acquired:
                return self._fallback(key)
            # Another caller may have stored it while we waited.
            record = self.cache.lookup(key)
            if record is not None:
                logger.info("Cache filled for %s while waiting", key)
                return Resolution(record, from_cache=True)
            return self._fetch_and_store(raw_address, key, deadline)

    def _fetch_and_store(self, raw_address, key, deadline):
        service = self.provider.service_name
        if not self.rate_limiter.admit(service):
            raise RateLimitExceeded(f"{service}: local request budget exhausted")

        query, postal_code = self._provider_query(raw_address, key)
        weather = self.provider.fetch(query, deadline=deadline)
        if weather is None:
            logger.info("No forecast found for %r", raw_address)
            return None

        postal_code = postal_code or weather.location.postal_code
        record = self.cache.build_record(raw_address, key, weather, postal_code=postal_code)
        return Resolution(self.cache.store(record))

    def _provider_query(self, raw_address, key):
        postal_code = extract_postal_code(raw_address)
        if is_postal_code(key) or self.geocoder is None:
            return key, postal_code
        location = self.geocoder.locate(key)
        if location is not None:
            postal_code = postal_code or location.postal_code
        return best_query(location, key), postal_code

    def _fallback(self, key):
        record = self.cache.latest(key)
        if record is None:
            raise UpstreamTimeoutError(f"timed out waiting for in-flight fetch of {key}")
        logger.warning("Timed out waiting for %s, serving record %s from %s", key, record.id, record.queried_at)
        return Resolution(record, from_cache=True)

    @staticmethod
    def _remaining(deadline):
        if deadline is None:
            return None
        return max(deadline - time.monotonic(), 0)
