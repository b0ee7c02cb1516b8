"""Error taxonomy for the dispatch core and the single failure classifier.

Backend clients raise :class:`BackendError` or :class:`BackendTransportError`.
Only the dispatcher turns those into :class:`RelayError` subclasses, and it does
so through :func:`classify_failure` so that message matching can be swapped for
structured codes without touching the retry loop.
"""

import asyncio
import enum
import re
from typing import Union

import aiohttp
import httpx


class ConfigurationError(ValueError):
    """Raised at startup when the relay cannot be built (e.g. no credentials)."""


# ---------- raised by backend clients ----------


class BackendError(Exception):
    def __init__(
        self,
        message: str,
        status_code: Union[int, None] = None,
        status: Union[str, None] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.status = status


class BackendTransportError(BackendError):
    """The request never produced an HTTP response (DNS, connect, reset, timeout)."""


# ---------- surfaced to the request-handling layer ----------


class RelayError(Exception):
    # Hints for the HTTP layer; it owns the final mapping.
    status_code = 500
    retry_after: Union[int, None] = None

    def __init__(self, message: str, attempts: int = 1):
        super().__init__(message)
        self.attempts = attempts


class AllCredentialsExhausted(RelayError):
    status_code = 429
    retry_after = 120


class RateLimited(RelayError):
    status_code = 429
    retry_after = 90


class QuotaExhaustedPermanent(RelayError):
    status_code = 429
    retry_after = 90


class SafetyBlocked(RelayError):
    status_code = 400


class EmptyResponse(RelayError):
    status_code = 502


class NetworkError(RelayError):
    status_code = 503


class UnknownBackendError(RelayError):
    status_code = 500


class InvalidCredential(UnknownBackendError):
    status_code = 401


# ---------- classification ----------


class FailureClass(enum.Enum):
    QUOTA_ZERO = "quota_zero"
    RATE_LIMITED = "rate_limited"
    NETWORK = "network"
    INVALID_CREDENTIAL = "invalid_credential"
    UNKNOWN = "unknown"

    @property
    def retryable(self) -> bool:
        return self in (FailureClass.QUOTA_ZERO, FailureClass.RATE_LIMITED, FailureClass.NETWORK)


_QUOTA_ZERO_RE = re.compile(r'quota_limit_value"?\s*[:=]\s*"?0(?![\d.])')
_RATE_LIMIT_MARKERS = ("429", "rate limit", "quota", "Quota exceeded", "RATE_LIMIT_EXCEEDED")
_INVALID_KEY_MARKERS = ("API_KEY_INVALID", "invalid api key")
_NETWORK_MARKERS = ("fetch",)


_NETWORK_EXCEPTIONS = (
    BackendTransportError,
    ConnectionError,
    asyncio.TimeoutError,
    httpx.TransportError,
    aiohttp.ClientConnectionError,
)


def classify_failure(exc: BaseException) -> FailureClass:
    """Map a backend failure onto the class that drives marking and retry."""
    message = str(exc)
    if _QUOTA_ZERO_RE.search(message):
        return FailureClass.QUOTA_ZERO
    status_code = getattr(exc, "status_code", None)
    status = getattr(exc, "status", None)
    if status_code == 429 or status == "RESOURCE_EXHAUSTED":  # noqa: PLR2004, http status code can be constant
        return FailureClass.RATE_LIMITED
    if any(m in message for m in _RATE_LIMIT_MARKERS):
        return FailureClass.RATE_LIMITED
    if isinstance(exc, _NETWORK_EXCEPTIONS):
        return FailureClass.NETWORK
    if any(m in message for m in _NETWORK_MARKERS):
        return FailureClass.NETWORK
    if any(m in message for m in _INVALID_KEY_MARKERS):
        return FailureClass.INVALID_CREDENTIAL
    return FailureClass.UNKNOWN


# terminal error raised once a retryable class runs out of attempts
EXHAUSTED_RETRY_ERRORS: dict[FailureClass, type[RelayError]] = {
    FailureClass.QUOTA_ZERO: QuotaExhaustedPermanent,
    FailureClass.RATE_LIMITED: RateLimited,
    FailureClass.NETWORK: NetworkError,
}
