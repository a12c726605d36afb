"""Fan-out of audit events to Redis pub/sub.

Enabled only when ``REDIS_URL`` is set and the ``redis`` client is installed
(``aligna-summary[events]``). Publishing never raises. A connection that
failed is re-opened on a later event, at most once per ``RECONNECT_INTERVAL``.
"""

from __future__ import annotations

import json
import logging
import os
import time
from typing import Any, Callable, Dict, Optional

try:  # pragma: no cover - optional dependency
    import redis  # type: ignore
except Exception:  # pragma: no cover - optional dependency
    redis = None  # type: ignore

LOG = logging.getLogger("aligna.audit")

CHANNEL_PREFIX = "aligna.audit"
RECONNECT_INTERVAL = 5.0


class AuditPublisher:
    def __init__(
        self,
        url: str,
        *,
        prefix: str = CHANNEL_PREFIX,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.url = url
        self.prefix = prefix
        self._clock = clock
        self._client = None
        self._next_attempt = 0.0

    def channel_for(self, event: str) -> str:
        return f"{self.prefix}.{event}"

    def _ensure_client(self):
        if self._client is not None:
            return self._client
        if redis is None or self._clock() < self._next_attempt:
            return None
        try:
            client = redis.Redis.from_url(self.url, socket_timeout=0.5)
            client.ping()
        except Exception as exc:
            LOG.debug("redis connect failed: %s", exc)
            self._next_attempt = self._clock() + RECONNECT_INTERVAL
            return None
        self._client = client
        return client

    def publish(self, event: str, payload: Dict[str, Any]) -> bool:
        """Publish one event; False when it was dropped."""
        client = self._ensure_client()
        if client is None:
            return False
        try:
            client.publish(self.channel_for(event), json.dumps(payload, default=str, sort_keys=True))
        except Exception as exc:
            LOG.debug("redis publish failed: %s", exc)
            self._client = None
            return False
        return True


_publisher: Optional[AuditPublisher] = None


def get_publisher() -> Optional[AuditPublisher]:
    global _publisher
    if _publisher is None:
        url = os.getenv("REDIS_URL")
        if not url:
            return None
        _publisher = AuditPublisher(url)
    return _publisher


def publish_event(event: str, payload: Dict[str, Any]) -> None:
    """Publish to ``aligna.audit.<event>``; no-op without REDIS_URL."""
    publisher = get_publisher()
    if publisher is not None:
        publisher.publish(event, payload)
