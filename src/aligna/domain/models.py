from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel


class SessionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"


class LeaseStatus(str, Enum):
    NONE = "none"
    GENERATING = "generating"
    READY = "ready"
    ERROR = "error"


class ToneProfile(str, Enum):
    CELEBRATORY_GROWTH = "CELEBRATORY_GROWTH"
    BALANCED_GROWTH = "BALANCED_GROWTH"
    GENTLE_STRUCTURED = "GENTLE_STRUCTURED"


class PairSession(BaseModel):
    id: str
    created_by: Optional[str] = None
    partner_id: Optional[str] = None
    status: str = SessionStatus.PENDING.value

    @property
    def participants(self) -> List[str]:
        return [p for p in (self.created_by, self.partner_id) if p]


class ResponseRow(BaseModel):
    session_id: Optional[str] = None
    user_id: str
    question_id: str
    value: Any = None


class GenerationLease(BaseModel):
    session_id: str
    status: LeaseStatus = LeaseStatus.NONE
    generated_by: Optional[str] = None
    locked_until: Optional[datetime] = None
    summary: Optional[str] = None
    metrics: Optional[dict] = None
    error_message: Optional[str] = None
    updated_at: Optional[datetime] = None


class ClaimResult(BaseModel):
    claimed: bool
    current_status: Optional[str] = LeaseStatus.NONE.value
    existing_summary: Optional[str] = None
    # Expiry stamped by this claim; doubles as the holder's claim token.
    locked_until: Optional[datetime] = None


class PerUserSummary(BaseModel):
    session_id: str
    user_id: str
    summary: str
    metrics: Optional[dict] = None
    updated_at: Optional[datetime] = None


class AuditEvent(BaseModel):
    session_id: str
    user_id: str
    event: str
    details: Optional[dict] = None
    created_at: Optional[datetime] = None


class SummaryRequest(BaseModel):
    sessionId: Optional[str] = None
