"""Call-with-retry primitive shared by every outbound HTTP call.

One logical call is executed against an attempt budget. Status based retry
(429/502/503/504) is optional; transport failures are classified into a
local timeout ("the request may still be running upstream"), a transient
failure worth retrying, or a fatal failure. Exhausting the budget returns the
last response, or raises the last classified error, and the caller decides
what it means.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

import requests
from requests.adapters import HTTPAdapter

LOG = logging.getLogger("aligna.http")

RETRYABLE_STATUSES = frozenset({429, 502, 503, 504})

_TRANSIENT_MARKERS = (
    "connection reset",
    "connection error",
    "sendrequest",
    "timed out",
    "timeout",
    "network",
)
_ABORT_MARKERS = ("aborterror", "aborted", "the signal has been aborted")

TIMEOUT = "timeout"
TRANSIENT = "transient"
FATAL = "fatal"


class TransportError(Exception):
    """A request that never produced an HTTP response."""


class TransientTransportError(TransportError):
    pass


class LocalTimeoutError(TransientTransportError):
    """Our own deadline fired; the upstream may still be working."""


@dataclass(frozen=True)
class RetryPolicy:
    retries: int = 3
    base_delay: float = 0.35
    timeout: float = 12.0
    retry_on_statuses: bool = True

    def delay_for(self, attempt: int) -> float:
        return self.base_delay * (2 ** attempt)


DEFAULT_POLICY = RetryPolicy()


def classify_failure(exc: BaseException) -> str:
    """Return ``timeout``, ``transient`` or ``fatal`` for a transport failure.

    Exception types are checked first; the description is only inspected
    when the type says nothing useful.
    """

    if isinstance(exc, LocalTimeoutError):
        return TIMEOUT
    if isinstance(exc, TransientTransportError):
        return TRANSIENT
    # ConnectTimeout never reached the server, so nothing can still be running there.
    if isinstance(exc, requests.exceptions.ConnectTimeout):
        return TRANSIENT
    if isinstance(exc, requests.exceptions.Timeout):
        return TIMEOUT
    if isinstance(exc, (requests.exceptions.ConnectionError, ConnectionResetError)):
        return TRANSIENT

    msg = f"{type(exc).__name__}: {exc}".lower()
    if any(marker in msg for marker in _ABORT_MARKERS):
        return TIMEOUT
    if any(marker in msg for marker in _TRANSIENT_MARKERS):
        return TRANSIENT
    return FATAL


def _wrap(exc: BaseException, kind: str) -> TransportError:
    if kind == TIMEOUT:
        return LocalTimeoutError(f"request timed out locally: {exc}")
    if kind == TRANSIENT:
        return TransientTransportError(str(exc))
    return TransportError(str(exc))


def build_session(pool_size: int = 10) -> requests.Session:
    session = requests.Session()
    # Retries are driven by fetch_with_retry, not by urllib3.
    adapter = HTTPAdapter(max_retries=0, pool_connections=pool_size, pool_maxsize=pool_size)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


def fetch_with_retry(
    session: requests.Session,
    method: str,
    url: str,
    *,
    policy: RetryPolicy = DEFAULT_POLICY,
    sleep: Callable[[float], None] = time.sleep,
    **kwargs: Any,
) -> requests.Response:
    """Execute ``session.request`` under ``policy``.

    Raises
    ------
    LocalTimeoutError
        The final attempt hit the local deadline.
    TransientTransportError
        The final attempt failed with a retryable transport error.
    TransportError
        A non-retryable transport failure (raised without further attempts).
    """

    attempt = 0
    while True:
        try:
            response = session.request(method, url, timeout=policy.timeout, **kwargs)
        except (requests.exceptions.RequestException, OSError, TransportError) as exc:
            kind = classify_failure(exc)
            if kind == FATAL or attempt >= policy.retries:
                raise _wrap(exc, kind) from exc
            delay = policy.delay_for(attempt)
            LOG.debug(
                "http_retry_transport",
                extra={"url": url, "attempt": attempt, "kind": kind, "delay_s": delay},
            )
            sleep(delay)
            attempt += 1
            continue

        if policy.retry_on_statuses and response.status_code in RETRYABLE_STATUSES and attempt < policy.retries:
            delay = policy.delay_for(attempt)
            LOG.debug(
                "http_retry_status",
                extra={"url": url, "attempt": attempt, "status": response.status_code, "delay_s": delay},
            )
            response.close()
            sleep(delay)
            attempt += 1
            continue

        return response
