from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any, Dict, List, Optional

from ..domain.models import AuditEvent
from ..infrastructure.events import publish_event
from ..infrastructure.store import SummaryStore

_logger = logging.getLogger("aligna.audit")

# Rolling buffer of recent events for diagnostics (best-effort only)
_RECENT_EVENTS: List[AuditEvent] = []
_MAX_BUFFER = 200


def list_recent_events(limit: int = 50) -> List[AuditEvent]:
    if limit <= 0:
        return []
    return list(_RECENT_EVENTS[-limit:])


class AuditLogger:
    """Append-only audit trail for summary generation.

    Every sink is best-effort: nothing raised while recording an event ever
    reaches the caller.
    """

    def __init__(self, store: Optional[SummaryStore]) -> None:
        self._store = store

    def log(self, session_id: str, user_id: str, event: str, details: Optional[Dict[str, Any]] = None) -> None:
        record = AuditEvent(
            session_id=session_id,
            user_id=user_id,
            event=event,
            details=details,
            created_at=datetime.now(UTC),
        )

        _RECENT_EVENTS.append(record)
        if len(_RECENT_EVENTS) > _MAX_BUFFER:
            del _RECENT_EVENTS[0 : len(_RECENT_EVENTS) - _MAX_BUFFER]

        try:
            _logger.info(
                "audit_event",
                extra={"audit_event": event, "session_id": session_id, "user_id": user_id, "audit_details": details},
            )
        except Exception:
            pass

        if self._store is not None:
            try:
                self._store.append_audit_event(record)
            except Exception as exc:
                _logger.debug("audit store write failed: %s", exc)

        try:
            publish_event(event, record.model_dump(mode="json"))
        except Exception:
            pass
