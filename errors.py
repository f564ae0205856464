import enum
import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)


class WeatherError(RuntimeError):
    """Base class for every failure the forecast pipeline reports."""

    def __init__(self, message: str = "", status: int | None = None, body: dict | None = None):
        super().__init__(message or self.__class__.__name__)
        self.status = status
        self.body = body or {}


class ValidationError(WeatherError):
    """Blank or malformed caller input."""


class ConfigurationError(WeatherError):
    """Missing API key or unknown provider."""


class AuthenticationError(WeatherError):
    """Upstream rejected the credentials (401/403)."""


class RateLimitExceeded(WeatherError):
    """Local budget exhausted or upstream answered 429."""


class UpstreamError(WeatherError):
    """Any other 4xx/5xx from a provider."""


class UpstreamTimeoutError(WeatherError):
    """Connection failure, stall or exhausted deadline."""


class MalformedResponseError(WeatherError):
    """Provider payload violated its contract."""


class ErrorKind(enum.Enum):
    VALIDATION = "validation"
    CONFIGURATION = "configuration"
    AUTHENTICATION = "authentication"
    RATE_LIMITED = "rate_limited"
    UPSTREAM = "upstream"
    TIMEOUT = "timeout"
    MALFORMED_RESPONSE = "malformed_response"
    NOT_FOUND = "not_found"
    INTERNAL = "internal"


@dataclass(frozen=True)
class Classification:
    kind: ErrorKind
    status: int
    message: str


_RULES = (
    (ValidationError, ErrorKind.VALIDATION, 422, "Please enter a city, address or postal code."),
    (ConfigurationError, ErrorKind.CONFIGURATION, 503, "Service configuration error. Please contact support."),
    (AuthenticationError, ErrorKind.AUTHENTICATION, 502, "Weather service rejected our credentials."),
    (RateLimitExceeded, ErrorKind.RATE_LIMITED, 429, "Rate limit exceeded. Please try again later."),
    (UpstreamTimeoutError, ErrorKind.TIMEOUT, 504, "Unable to reach the weather service in time."),
    (MalformedResponseError, ErrorKind.MALFORMED_RESPONSE, 502, "Invalid response format from the weather service."),
    (UpstreamError, ErrorKind.UPSTREAM, 502, "Weather service error. Please try again later."),
)

NOT_FOUND = Classification(ErrorKind.NOT_FOUND, 404, "No forecast found for that location.")
INTERNAL = Classification(ErrorKind.INTERNAL, 500, "An unexpected error occurred.")


class ErrorClassifier:
    """Maps a resolve outcome (error or None for not-found) to a kind and caller-visible status."""

    def classify(self, outcome, context=None) -> Classification:
        if outcome is None:
            return NOT_FOUND
        for error_type, kind, status, message in _RULES:
            if isinstance(outcome, error_type):
                self.log_error(outcome, context)
                return Classification(kind, status, message)
        self.log_error(outcome, context)
        return INTERNAL

    @staticmethod
    def log_error(error, context=None):
        level = logging.WARNING if isinstance(error, (ValidationError, RateLimitExceeded)) else logging.ERROR
        logger.log(
            level,
            "%s: %s context=%s",
            error.__class__.__name__,
            error,
            context or {},
            exc_info=not isinstance(error, WeatherError),
        )
