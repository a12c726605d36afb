from __future__ import annotations

from datetime import UTC, datetime, timedelta
from enum import Enum
from threading import Lock, RLock
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Set, Tuple

from ..config import Settings
from ..domain.models import (
    AuditEvent,
    ClaimResult,
    GenerationLease,
    LeaseStatus,
    PairSession,
    PerUserSummary,
    ResponseRow,
)

USER_SUMMARIES = "ai_summaries"
COUPLE_SUMMARIES = "ai_couple_summaries"


class StoreErrorKind(str, Enum):
    MISSING_FIELD = "missing_field"
    NOT_FOUND = "not_found"
    UNAVAILABLE = "unavailable"
    OTHER = "other"


class StoreError(Exception):
    """A read or write the data store rejected or could not serve."""

    def __init__(
        self,
        message: str,
        *,
        kind: StoreErrorKind = StoreErrorKind.OTHER,
        status: Optional[int] = None,
        field: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.status = status
        self.field = field


class SummaryStore(Protocol):
    def get_session(self, session_id: str) -> Optional[PairSession]: ...

    def list_responses(self, session_id: str) -> List[ResponseRow]: ...

    def has_entitlement(self, user_id: str) -> bool: ...

    def grant_entitlement(self, user_id: str, platform: str, transaction_id: str) -> Dict[str, Any]: ...

    def get_compatibility_metrics(self, session_id: str) -> Optional[Dict[str, Any]]: ...

    def get_lease(self, session_id: str) -> Optional[GenerationLease]: ...

    def claim_lease(self, session_id: str, user_id: str, lease_seconds: int) -> ClaimResult: ...

    def patch_lease(
        self,
        session_id: str,
        patch: Mapping[str, Any],
        expected_holder: Optional[str] = None,
        expected_locked_until: Optional[datetime] = None,
    ) -> bool: ...

    def upsert_user_summary(self, row: Mapping[str, Any]) -> None: ...

    def get_user_summary(self, session_id: str, user_id: str) -> Optional[PerUserSummary]: ...

    def append_audit_event(self, event: AuditEvent) -> None: ...


def _utcnow() -> datetime:
    return datetime.now(UTC)


class InMemorySummaryStore:
    """Thread-safe in-memory store.

    Leases live in a ``session_id -> GenerationLease`` table; each session
    has its own lock so claims on one session never wait on another.
    Expired ``generating`` leases are only noticed when touched.

    ``provisioned_fields`` maps a collection name to the set of fields that
    exist in it; writes carrying any other field are rejected the way a SQL
    backend rejects an unknown column. ``None`` means every field exists.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], datetime] = _utcnow,
        provisioned_fields: Optional[Mapping[str, Iterable[str]]] = None,
    ) -> None:
        self._clock = clock
        self._provisioned: Optional[Dict[str, Set[str]]] = (
            {name: set(fields) for name, fields in provisioned_fields.items()} if provisioned_fields else None
        )
        self._registry_lock = Lock()
        self._session_locks: Dict[str, RLock] = {}
        self._data_lock = RLock()

        self._sessions: Dict[str, PairSession] = {}
        self._responses: Dict[str, List[ResponseRow]] = {}
        self._entitlements: Dict[str, Dict[str, Any]] = {}
        self._metrics: Dict[str, Dict[str, Any]] = {}
        self._leases: Dict[str, GenerationLease] = {}
        self._user_summaries: Dict[Tuple[str, str], PerUserSummary] = {}
        self._audit: List[AuditEvent] = []

    # ------------------------------------------------------------------
    # Seeding helpers
    # ------------------------------------------------------------------
    def add_session(self, session: PairSession) -> None:
        with self._data_lock:
            self._sessions[session.id] = session

    def add_responses(self, session_id: str, rows: Iterable[ResponseRow]) -> None:
        with self._data_lock:
            self._responses.setdefault(session_id, []).extend(rows)

    def set_metrics(self, session_id: str, metrics: Optional[Dict[str, Any]]) -> None:
        with self._data_lock:
            if metrics is None:
                self._metrics.pop(session_id, None)
            else:
                self._metrics[session_id] = dict(metrics)

    def audit_events(self) -> List[AuditEvent]:
        with self._data_lock:
            return list(self._audit)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _lock_for(self, session_id: str) -> RLock:
        with self._registry_lock:
            lock = self._session_locks.get(session_id)
            if lock is None:
                lock = RLock()
                self._session_locks[session_id] = lock
            return lock

    def _check_fields(self, collection: str, fields: Iterable[str]) -> None:
        if self._provisioned is None or collection not in self._provisioned:
            return
        known = self._provisioned[collection]
        for name in fields:
            if name not in known:
                raise StoreError(
                    f'column "{name}" of relation "{collection}" does not exist',
                    kind=StoreErrorKind.MISSING_FIELD,
                    status=400,
                    field=name,
                )

    def _lease_active(self, lease: GenerationLease, now: datetime) -> bool:
        return (
            lease.status == LeaseStatus.GENERATING
            and lease.locked_until is not None
            and lease.locked_until > now
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_session(self, session_id: str) -> Optional[PairSession]:
        with self._data_lock:
            return self._sessions.get(session_id)

    def list_responses(self, session_id: str) -> List[ResponseRow]:
        with self._data_lock:
            return list(self._responses.get(session_id, []))

    def has_entitlement(self, user_id: str) -> bool:
        with self._data_lock:
            return user_id in self._entitlements

    def get_compatibility_metrics(self, session_id: str) -> Optional[Dict[str, Any]]:
        with self._data_lock:
            metrics = self._metrics.get(session_id)
            return dict(metrics) if metrics is not None else None

    def get_lease(self, session_id: str) -> Optional[GenerationLease]:
        with self._lock_for(session_id):
            lease = self._leases.get(session_id)
            return lease.model_copy() if lease else None

    def get_user_summary(self, session_id: str, user_id: str) -> Optional[PerUserSummary]:
        with self._data_lock:
            return self._user_summaries.get((session_id, user_id))

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def grant_entitlement(self, user_id: str, platform: str, transaction_id: str) -> Dict[str, Any]:
        row = {
            "user_id": user_id,
            "type": "lifetime_unlock",
            "platform": platform,
            "transaction_id": transaction_id,
        }
        with self._data_lock:
            self._entitlements[user_id] = row
        return dict(row)

    def claim_lease(self, session_id: str, user_id: str, lease_seconds: int) -> ClaimResult:
        with self._lock_for(session_id):
            now = self._clock()
            lease = self._leases.get(session_id)
            if lease is not None:
                if lease.status == LeaseStatus.READY and lease.summary:
                    return ClaimResult(claimed=False, current_status=LeaseStatus.READY.value, existing_summary=lease.summary)
                if self._lease_active(lease, now):
                    return ClaimResult(claimed=False, current_status=LeaseStatus.GENERATING.value)

            locked_until = now + timedelta(seconds=lease_seconds)
            self._leases[session_id] = GenerationLease(
                session_id=session_id,
                status=LeaseStatus.GENERATING,
                generated_by=user_id,
                locked_until=locked_until,
                summary=None,
                metrics=lease.metrics if lease else None,
                error_message=None,
                updated_at=now,
            )
            return ClaimResult(claimed=True, current_status=LeaseStatus.GENERATING.value, locked_until=locked_until)

    def patch_lease(
        self,
        session_id: str,
        patch: Mapping[str, Any],
        expected_holder: Optional[str] = None,
        expected_locked_until: Optional[datetime] = None,
    ) -> bool:
        self._check_fields(COUPLE_SUMMARIES, patch.keys())
        with self._lock_for(session_id):
            lease = self._leases.get(session_id)
            if lease is None:
                return False
            if expected_holder is not None and lease.generated_by != expected_holder:
                return False
            if expected_locked_until is not None and lease.locked_until != expected_locked_until:
                return False
            update = dict(patch)
            if "status" in update:
                update["status"] = LeaseStatus(update["status"])
            self._leases[session_id] = lease.model_copy(update=update)
            return True

    def upsert_user_summary(self, row: Mapping[str, Any]) -> None:
        self._check_fields(USER_SUMMARIES, row.keys())
        key = (str(row["session_id"]), str(row["user_id"]))
        with self._data_lock:
            existing = self._user_summaries.get(key)
            merged: Dict[str, Any] = existing.model_dump() if existing else {}
            merged.update(row)
            merged["updated_at"] = self._clock()
            self._user_summaries[key] = PerUserSummary(**merged)

    def append_audit_event(self, event: AuditEvent) -> None:
        with self._data_lock:
            self._audit.append(event)


_memory_store: Optional[InMemorySummaryStore] = None
_rest_store: Optional[SummaryStore] = None


def get_store(settings: Settings) -> SummaryStore:
    global _memory_store
    global _rest_store
    if settings.store_impl == "rest":
        if _rest_store is None:
            from .store_rest import RestSummaryStore

            _rest_store = RestSummaryStore.from_settings(settings)
        return _rest_store
    if _memory_store is None:
        _memory_store = InMemorySummaryStore()
    return _memory_store
