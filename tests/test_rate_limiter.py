import threading

from conftest import FakeClock
from rate_limiter import RateLimiter


def test_admits_up_to_budget_then_denies():
    limiter = RateLimiter(max_requests_per_minute=5, clock=FakeClock())
    assert all(limiter.admit("weatherapi") for _ in range(5))
    assert limiter.admit("weatherapi") is False
    assert limiter.current_request_count("weatherapi") == 5


def test_default_budget_is_sixty_per_minute():
    limiter = RateLimiter(clock=FakeClock())
    results = [limiter.admit("openweathermap") for _ in range(61)]
    assert results[:60] == [True] * 60
    assert results[60] is False


def test_services_have_independent_budgets():
    limiter = RateLimiter(max_requests_per_minute=2, clock=FakeClock())
    assert limiter.admit("weatherapi")
    assert limiter.admit("weatherapi")
    assert not limiter.admit("weatherapi")
    assert limiter.admit("openweathermap")


def test_new_minute_bucket_restores_budget_and_drops_old_counters():
    clock = FakeClock()
    limiter = RateLimiter(max_requests_per_minute=1, clock=clock)
    assert limiter.admit("weatherapi")
    assert not limiter.admit("weatherapi")

    clock.advance(minutes=1)
    assert limiter.admit("weatherapi")
    assert len(limiter._counts) == 1


def test_reset_clears_all_counters():
    limiter = RateLimiter(max_requests_per_minute=1, clock=FakeClock())
    limiter.admit("weatherapi")
    limiter.reset()
    assert limiter.current_request_count("weatherapi") == 0
    assert limiter.admit("weatherapi")


def test_concurrent_admissions_never_exceed_budget():
    limiter = RateLimiter(max_requests_per_minute=50, clock=FakeClock())
    admitted = []
    start = threading.Barrier(10)

    def worker():
        start.wait()
        for _ in range(20):
            if limiter.admit("weatherapi"):
                admitted.append(1)

    threads = [threading.Thread(target=worker) for _ in range(10)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(admitted) == 50
    assert limiter.current_request_count("weatherapi") == 50
