from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status
from pydantic import BaseModel

from ...config import Settings
from ...domain.models import AuditEvent
from ...security.identity import bearer_token
from ...services.audit import list_recent_events
from ..deps import get_settings

router = APIRouter(prefix="/diagnostics", tags=["diagnostics"])

MAX_RECENT_LIMIT = 200


class RecentAuditResponse(BaseModel):
    events: List[AuditEvent]


def require_operator(
    authorization: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> None:
    if not settings.diagnostics_token:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Diagnostics disabled")
    if bearer_token(authorization) != settings.diagnostics_token:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")


@router.get("/audit/recent", response_model=RecentAuditResponse)
def recent_audit_events(limit: int = 25, _: None = Depends(require_operator)) -> RecentAuditResponse:
    """Most recent audit events recorded by this process, oldest first."""
    return RecentAuditResponse(events=list_recent_events(min(limit, MAX_RECENT_LIMIT)))
