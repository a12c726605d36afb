"""Dual write of a finished summary: per-user row, then the shared row.

Both writes first include the analytics-only ``metrics`` field. Stores that
have not provisioned it reject the write; that one rejection is retried
without the field so the user-visible operation still succeeds.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any, Callable, Dict, Mapping, Optional, Sequence

from ..domain.models import LeaseStatus
from ..infrastructure.store import StoreError, StoreErrorKind, SummaryStore

LOG = logging.getLogger("aligna.store")

METRICS_FIELD = "metrics"
OPTIONAL_FIELDS = (METRICS_FIELD,)


class PersistenceError(Exception):
    def __init__(self, message: str, details: Optional[str] = None) -> None:
        super().__init__(message)
        self.details = details


def is_missing_field_error(exc: StoreError, field: str) -> bool:
    """True when ``exc`` says ``field`` has no storage location.

    The typed kind is authoritative; the text checks cover stores that only
    report the problem in prose.
    """

    if exc.kind == StoreErrorKind.MISSING_FIELD and exc.field in (None, field):
        return True
    text = exc.message or ""
    lowered = text.lower()
    return (
        f'column "{field}" of relation' in lowered and "does not exist" in lowered
    ) or f"could not find the '{field}' column" in lowered or (
        field in lowered and "does not exist" in lowered
    )


def write_tolerating_missing_fields(
    write: Callable[[Dict[str, Any]], Any],
    payload: Mapping[str, Any],
    optional: Sequence[str] = OPTIONAL_FIELDS,
) -> Any:
    """Call ``write(payload)``; retry once without an optional field the store lacks."""

    try:
        return write(dict(payload))
    except StoreError as exc:
        dropped = [f for f in optional if f in payload and is_missing_field_error(exc, f)]
        if not dropped:
            raise
        LOG.warning("store missing optional field(s) %s; retrying without", ",".join(dropped))
        reduced = {k: v for k, v in payload.items() if k not in dropped}
        return write(reduced)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SummaryWriter:
    def __init__(self, store: SummaryStore, *, clock: Callable[[], datetime] = _utcnow) -> None:
        self._store = store
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    def save_user_summary(
        self,
        session_id: str,
        user_id: str,
        summary: str,
        metrics: Optional[Dict[str, Any]],
    ) -> None:
        row = {"session_id": session_id, "user_id": user_id, "summary": summary, METRICS_FIELD: metrics}
        try:
            write_tolerating_missing_fields(self._store.upsert_user_summary, row)
        except StoreError as exc:
            raise PersistenceError("Failed to save per-user summary", details=exc.message) from exc

    def patch_shared(
        self,
        session_id: str,
        patch: Mapping[str, Any],
        holder: Optional[str],
        token: Optional[datetime] = None,
    ) -> bool:
        """Patch the shared row if ``holder`` still owns it; False when it does not.

        ``token`` is the ``locked_until`` stamped by the holder's claim. With it,
        a later claim by the same user also invalidates this holder.
        """

        def _write(body: Dict[str, Any]) -> bool:
            return self._store.patch_lease(session_id, body, expected_holder=holder, expected_locked_until=token)

        try:
            return bool(write_tolerating_missing_fields(_write, patch))
        except StoreError as exc:
            raise PersistenceError("Failed to update shared summary", details=exc.message) from exc

    def publish_shared(
        self,
        session_id: str,
        holder: str,
        summary: str,
        metrics: Optional[Dict[str, Any]],
        token: Optional[datetime] = None,
    ) -> bool:
        return self.patch_shared(
            session_id,
            {
                "status": LeaseStatus.READY.value,
                "summary": summary,
                METRICS_FIELD: metrics,
                "generated_by": holder,
                "error_message": None,
                "updated_at": self.now(),
            },
            holder,
            token,
        )
