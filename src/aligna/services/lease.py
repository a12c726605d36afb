"""Claim/lease protocol guaranteeing one generation per session.

State per session::

    none -> generating -> ready | error
    generating -(ttl lapsed, re-claimed)-> generating

The claim itself is an atomic conditional write inside the store. Every
write after the claim is conditional on the caller still holding the lease,
so a holder whose lease lapsed and was re-claimed cannot overwrite the newer
generation; such writes report ``False`` and change nothing.

The holder is identified by its user id and, when the store reports one, the
``locked_until`` its claim stamped (``ClaimResult.locked_until``). The second
part tells apart two claims by the same user.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from ..domain.models import ClaimResult, LeaseStatus
from ..infrastructure.store import SummaryStore
from .persistence import SummaryWriter

LOG = logging.getLogger("aligna")

DEFAULT_LEASE_SECONDS = 180
MAX_ERROR_LENGTH = 2000


class LeaseCoordinator:
    def __init__(self, store: SummaryStore, writer: SummaryWriter, *, lease_seconds: int = DEFAULT_LEASE_SECONDS) -> None:
        self._store = store
        self._writer = writer
        self.lease_seconds = lease_seconds

    def claim(self, session_id: str, user_id: str, ttl: Optional[int] = None) -> ClaimResult:
        return self._store.claim_lease(session_id, user_id, ttl or self.lease_seconds)

    def _generating_patch(self) -> Dict[str, Any]:
        # summary stays None, never "": readers must see "nothing yet"
        return {
            "status": LeaseStatus.GENERATING.value,
            "summary": None,
            "error_message": None,
            "updated_at": self._writer.now(),
        }

    def begin(self, session_id: str, user_id: str, token: Optional[datetime] = None) -> bool:
        patch = self._generating_patch()
        patch["generated_by"] = user_id
        return self._checked(session_id, user_id, patch, "begin", token)

    def keep_generating(self, session_id: str, user_id: str, token: Optional[datetime] = None) -> bool:
        """Re-assert ``generating`` after a local timeout so callers poll instead of re-triggering."""
        return self._checked(session_id, user_id, self._generating_patch(), "keep_generating", token)

    def mark_ready(
        self,
        session_id: str,
        user_id: str,
        summary: str,
        metrics: Optional[Dict[str, Any]],
        token: Optional[datetime] = None,
    ) -> bool:
        if not summary:
            raise ValueError("a ready lease needs a summary")
        applied = self._writer.publish_shared(session_id, user_id, summary, metrics, token)
        if not applied:
            LOG.warning("stale lease holder; ready write skipped", extra={"session_id": session_id, "holder": user_id})
        return applied

    def mark_error(self, session_id: str, user_id: str, message: str, token: Optional[datetime] = None) -> bool:
        patch = {
            "status": LeaseStatus.ERROR.value,
            "error_message": (message or "unknown error")[:MAX_ERROR_LENGTH],
            "updated_at": self._writer.now(),
        }
        return self._checked(session_id, user_id, patch, "mark_error", token)

    def _checked(
        self,
        session_id: str,
        user_id: str,
        patch: Dict[str, Any],
        action: str,
        token: Optional[datetime],
    ) -> bool:
        applied = self._writer.patch_shared(session_id, patch, user_id, token)
        if not applied:
            LOG.warning("stale lease holder; %s write skipped", action, extra={"session_id": session_id, "holder": user_id})
        return applied
