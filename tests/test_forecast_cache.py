from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from conftest import weatherapi_payload
from forecast_cache import Freshness, classify_freshness
from models import ForecastRecord, db
from transform import WeatherApiResponse, transform


def canonical(days=5):
    return transform(WeatherApiResponse(weatherapi_payload(days=days), days=days))


def stored(cache, key="98101", raw="98101", postal_code="98101"):
    return cache.store(cache.build_record(raw, key, canonical(), postal_code=postal_code))


def test_build_record_copies_canonical_fields(cache, clock):
    record = cache.build_record("San Francisco, CA", "san francisco,ca", canonical())
    assert record.current_temp_c == 18
    assert (record.high_temp_c, record.low_temp_c) == (20, 12)
    assert record.conditions == "Partly cloudy"
    assert record.timezone == "America/Los_Angeles"
    assert record.queried_at == clock.now
    assert len(record.daily_forecast()) == 5


def test_lookup_right_after_store_is_fresh(cache, clock):
    record = stored(cache)
    found = cache.lookup("98101")
    assert found.id == record.id
    assert clock.now - found.queried_at < timedelta(minutes=1)
    assert cache.freshness(found) is Freshness.FRESH


def test_cached_valid_record_is_served(cache, clock):
    record = stored(cache)
    clock.advance(minutes=10)
    assert cache.lookup("98101").id == record.id
    assert cache.freshness(record) is Freshness.CACHED


def test_stale_record_is_a_miss(cache, clock):
    record = stored(cache)
    clock.advance(minutes=31)
    assert cache.lookup("98101") is None
    assert cache.freshness(record) is Freshness.STALE
    assert cache.latest("98101").id == record.id


def test_record_exactly_at_ttl_is_stale(cache, clock):
    stored(cache)
    clock.advance(minutes=30)
    assert cache.lookup("98101") is None


def test_lookup_returns_newest_record(cache, clock):
    stored(cache)
    clock.advance(minutes=5)
    newer = stored(cache)
    assert cache.lookup("98101").id == newer.id


def test_postal_code_key_matches_provider_postal_code(cache):
    record = stored(cache, key="seattle,wa", raw="Seattle, WA", postal_code="98101")
    assert cache.lookup("98101").id == record.id
    assert cache.lookup("seattle,wa").id == record.id
    assert cache.lookup("portland,or") is None
    assert cache.lookup("") is None


def test_duplicate_postal_code_and_timestamp_keeps_one_record(cache):
    first = stored(cache)
    second = stored(cache, key="98101", raw="98101 ")
    assert second.id == first.id
    assert ForecastRecord.query.count() == 1


def test_unique_constraint_is_enforced_by_table(cache, clock):
    stored(cache)
    db.session.add(cache.build_record("98101", "98101", canonical(), postal_code="98101"))
    with pytest.raises(IntegrityError):
        db.session.commit()
    db.session.rollback()


def test_recent_lists_newest_first(cache, clock):
    stored(cache, key="seattle,wa", raw="Seattle, WA", postal_code=None)
    clock.advance(minutes=1)
    stored(cache, key="portland,or", raw="Portland, OR", postal_code=None)
    assert [r.normalized_key for r in cache.recent(5)] == ["portland,or", "seattle,wa"]
    assert len(cache.recent(1)) == 1


@pytest.mark.parametrize(
    "age, expected",
    [
        (timedelta(seconds=0), Freshness.FRESH),
        (timedelta(seconds=59), Freshness.FRESH),
        (timedelta(minutes=1), Freshness.CACHED),
        (timedelta(minutes=29, seconds=59), Freshness.CACHED),
        (timedelta(minutes=30), Freshness.STALE),
        (timedelta(minutes=31), Freshness.STALE),
    ],
)
def test_classify_freshness(clock, age, expected):
    assert classify_freshness(clock.now - age, clock.now, timedelta(minutes=30)) is expected
