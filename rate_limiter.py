import logging
import threading
from datetime import datetime, timezone

DEFAULT_MAX_REQUESTS_PER_MINUTE = 60

logger = logging.getLogger(__name__)


def _utcnow():
    return datetime.now(timezone.utc)


class RateLimiter:
    """
    Per-service request budget over the current wall-clock minute.
    Counters are keyed "service:YYYY-MM-DD-HH-MM"; buckets other than the
    current minute are dropped on every call.
    """

    def __init__(self, max_requests_per_minute: int = DEFAULT_MAX_REQUESTS_PER_MINUTE, clock=_utcnow):
        self.max_requests_per_minute = max_requests_per_minute
        self._clock = clock
        self._counts: dict[str, int] = {}
        self._lock = threading.Lock()

    def _bucket(self) -> str:
        return self._clock().strftime("%Y-%m-%d-%H-%M")

    def admit(self, service_name: str) -> bool:
        bucket = self._bucket()
        key = f"{service_name}:{bucket}"
        with self._lock:
            self._cleanup(bucket)
            count = self._counts.get(key, 0)
            if count < self.max_requests_per_minute:
                self._counts[key] = count + 1
                return True
        logger.warning(
            "Rate limit exceeded for %s: %s requests per minute", service_name, self.max_requests_per_minute
        )
        return False

    def current_request_count(self, service_name: str) -> int:
        key = f"{service_name}:{self._bucket()}"
        with self._lock:
            return self._counts.get(key, 0)

    def reset(self):
        with self._lock:
            self._counts = {}

    # Caller holds the lock.
    def _cleanup(self, bucket: str):
        for key in [k for k in self._counts if not k.endswith(f":{bucket}")]:
            del self._counts[key]
