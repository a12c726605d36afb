"""PostgREST (Supabase) implementation of :class:`SummaryStore`.

Conditional writes are delegated to the database: the claim is a single RPC
(``claim_couple_summary_generation``) and holder-conditional patches add a
``generated_by=eq.<holder>`` filter (plus ``locked_until=eq.<claim expiry>``
when known) so a stale holder matches no row.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

import requests

from ..config import Settings
from ..domain.models import AuditEvent, ClaimResult, GenerationLease, PairSession, PerUserSummary, ResponseRow
from ..services.http_retry import RetryPolicy, TransportError, build_session, fetch_with_retry
from .store import COUPLE_SUMMARIES, USER_SUMMARIES, StoreError, StoreErrorKind

LOG = logging.getLogger("aligna.store")

READ_POLICY = RetryPolicy(retries=3, base_delay=0.35, timeout=12.0)
PATCH_POLICY = RetryPolicy(retries=2, base_delay=0.25, timeout=12.0)
LEASE_READ_POLICY = PATCH_POLICY
AUDIT_POLICY = RetryPolicy(retries=2, base_delay=0.2, timeout=8.0)

_LEASE_COLUMNS_FULL = "session_id,summary,status,generated_by,updated_at,error_message,locked_until"
_LEASE_COLUMNS_MINIMAL = "session_id,summary,generated_by,updated_at"

_MISSING_FIELD_CODES = {"PGRST204", "42703"}
_FIELD_PATTERNS = (
    re.compile(r"Could not find the '([^']+)' column"),
    re.compile(r'column "([^"]+)"'),
)


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    return value


def error_from_response(res: requests.Response, action: str) -> StoreError:
    """Map a PostgREST error body onto a typed :class:`StoreError`."""

    text = res.text or ""
    code = ""
    message = text
    try:
        body = json.loads(text)
        if isinstance(body, dict):
            code = str(body.get("code") or "")
            message = str(body.get("message") or text)
    except ValueError:
        pass

    field = None
    for pattern in _FIELD_PATTERNS:
        match = pattern.search(message)
        if match:
            field = match.group(1)
            break

    if code in _MISSING_FIELD_CODES:
        kind = StoreErrorKind.MISSING_FIELD
    elif res.status_code == 404:
        kind = StoreErrorKind.NOT_FOUND
    elif res.status_code >= 500 or res.status_code == 429:
        kind = StoreErrorKind.UNAVAILABLE
    else:
        kind = StoreErrorKind.OTHER
    return StoreError(f"{action} failed: status={res.status_code} body={text}", kind=kind, status=res.status_code, field=field)


class RestSummaryStore:
    def __init__(self, base_url: str, service_key: str, *, session: Optional[requests.Session] = None, sleep=None) -> None:
        self._base = base_url.rstrip("/") + "/rest/v1"
        self._key = service_key
        self._session = session or build_session()
        self._sleep_kwargs = {"sleep": sleep} if sleep is not None else {}

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "RestSummaryStore":
        return cls(settings.store_url, settings.service_key, **kwargs)

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------
    def _headers(self, prefer: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "content-type": "application/json",
            "apikey": self._key,
            "authorization": f"Bearer {self._key}",
        }
        if prefer:
            headers["prefer"] = prefer
        return headers

    def _send(
        self,
        method: str,
        path: str,
        *,
        policy: RetryPolicy = READ_POLICY,
        prefer: Optional[str] = None,
        params: Optional[Dict[str, str]] = None,
        body: Any = None,
    ) -> requests.Response:
        kwargs: Dict[str, Any] = {"headers": self._headers(prefer), "params": params}
        if body is not None:
            kwargs["data"] = json.dumps(_jsonable(body))
        try:
            return fetch_with_retry(self._session, method, f"{self._base}/{path}", policy=policy, **self._sleep_kwargs, **kwargs)
        except TransportError as exc:
            raise StoreError(f"{method} {path} failed: {exc}", kind=StoreErrorKind.UNAVAILABLE) from exc

    def _rows(self, res: requests.Response, action: str) -> List[Dict[str, Any]]:
        if not res.ok:
            raise error_from_response(res, action)
        try:
            data = json.loads(res.text or "[]")
        except ValueError as exc:
            raise StoreError(f"{action} returned non-json: {res.text[:500]}") from exc
        return data if isinstance(data, list) else [data]

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_session(self, session_id: str) -> Optional[PairSession]:
        res = self._send(
            "GET",
            "pair_sessions",
            params={"select": "id,created_by,partner_id,status", "id": f"eq.{session_id}", "limit": "1"},
        )
        rows = self._rows(res, "load session")
        return PairSession(**rows[0]) if rows else None

    def list_responses(self, session_id: str) -> List[ResponseRow]:
        res = self._send(
            "GET",
            "responses",
            params={"select": "question_id,user_id,value", "session_id": f"eq.{session_id}"},
        )
        return [ResponseRow(session_id=session_id, **row) for row in self._rows(res, "load responses")]

    def has_entitlement(self, user_id: str) -> bool:
        res = self._send(
            "GET",
            "purchases",
            params={"select": "id", "user_id": f"eq.{user_id}", "type": "eq.lifetime_unlock", "limit": "1"},
        )
        return len(self._rows(res, "entitlement lookup")) > 0

    def get_compatibility_metrics(self, session_id: str) -> Optional[Dict[str, Any]]:
        try:
            res = self._send("POST", "rpc/get_session_compatibility_metrics", body={"p_session_id": session_id})
        except StoreError as exc:
            LOG.error("metrics rpc failed: %s", exc)
            return None
        if not res.ok:
            LOG.error("metrics rpc failed: %s %s", res.status_code, res.text)
            return None
        try:
            data = json.loads(res.text)
        except ValueError:
            LOG.error("metrics rpc returned non-json: %s", (res.text or "")[:500])
            return None
        if isinstance(data, list):
            data = data[0] if data else None
        return data if isinstance(data, dict) else None

    def get_lease(self, session_id: str) -> Optional[GenerationLease]:
        for columns in (_LEASE_COLUMNS_FULL, _LEASE_COLUMNS_MINIMAL):
            try:
                res = self._send(
                    "GET",
                    COUPLE_SUMMARIES,
                    policy=LEASE_READ_POLICY,
                    params={"select": columns, "session_id": f"eq.{session_id}", "limit": "1"},
                )
                rows = self._rows(res, "load shared summary")
            except StoreError as exc:
                LOG.warning("shared summary read failed (%s): %s", columns, exc.message)
                continue
            if not rows:
                return None
            row = rows[0]
            # Rows from the minimal select carry no status column.
            if "status" not in row:
                row["status"] = "ready" if row.get("summary") else "none"
            if row.get("status") is None:
                row["status"] = "none"
            return GenerationLease(**row)
        return None

    def get_user_summary(self, session_id: str, user_id: str) -> Optional[PerUserSummary]:
        res = self._send(
            "GET",
            USER_SUMMARIES,
            params={
                "select": "session_id,user_id,summary,metrics",
                "session_id": f"eq.{session_id}",
                "user_id": f"eq.{user_id}",
                "limit": "1",
            },
        )
        rows = self._rows(res, "load per-user summary")
        return PerUserSummary(**rows[0]) if rows else None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def grant_entitlement(self, user_id: str, platform: str, transaction_id: str) -> Dict[str, Any]:
        row = {"user_id": user_id, "type": "lifetime_unlock", "platform": platform, "transaction_id": transaction_id}
        res = self._send(
            "POST",
            "purchases",
            params={"on_conflict": "user_id,type"},
            prefer="resolution=merge-duplicates,return=representation",
            body=row,
        )
        if not res.ok:
            raise error_from_response(res, "grant entitlement")
        return row

    def claim_lease(self, session_id: str, user_id: str, lease_seconds: int) -> ClaimResult:
        res = self._send(
            "POST",
            "rpc/claim_couple_summary_generation",
            body={"p_session_id": session_id, "p_user_id": user_id, "p_lock_seconds": lease_seconds},
        )
        rows = self._rows(res, "claim rpc")
        if not rows or not isinstance(rows[0], dict):
            raise StoreError(f"claim rpc returned no result: {res.text[:500]}")
        result = ClaimResult(**rows[0])
        if result.claimed and result.locked_until is None:
            # The RPC only reports the outcome; read back the expiry it stamped.
            lease = self.get_lease(session_id)
            if lease is not None and lease.generated_by == user_id:
                result = result.model_copy(update={"locked_until": lease.locked_until})
        return result

    def patch_lease(
        self,
        session_id: str,
        patch: Mapping[str, Any],
        expected_holder: Optional[str] = None,
        expected_locked_until: Optional[datetime] = None,
    ) -> bool:
        params = {"session_id": f"eq.{session_id}"}
        if expected_holder is not None:
            params["generated_by"] = f"eq.{expected_holder}"
        if expected_locked_until is not None:
            params["locked_until"] = f"eq.{expected_locked_until.isoformat()}"
        res = self._send(
            "PATCH",
            COUPLE_SUMMARIES,
            policy=PATCH_POLICY,
            params=params,
            prefer="return=representation",
            body=dict(patch),
        )
        rows = self._rows(res, "update shared summary")
        return len(rows) > 0

    def upsert_user_summary(self, row: Mapping[str, Any]) -> None:
        res = self._send(
            "POST",
            USER_SUMMARIES,
            params={"on_conflict": "session_id,user_id"},
            prefer="resolution=merge-duplicates,return=minimal",
            body=dict(row),
        )
        if not res.ok:
            raise error_from_response(res, "save per-user summary")

    def append_audit_event(self, event: AuditEvent) -> None:
        res = self._send(
            "POST",
            "ai_generation_events",
            policy=AUDIT_POLICY,
            prefer="return=minimal",
            body={
                "session_id": event.session_id,
                "user_id": event.user_id,
                "event": event.event,
                "details": event.details,
            },
        )
        if not res.ok:
            raise error_from_response(res, "audit event")
