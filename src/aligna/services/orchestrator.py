"""End-to-end summary request flow.

cache check -> entitlement -> session + answers -> claim -> metrics/tone ->
prompt -> generation -> repair/shape -> per-user write -> shared ready write.

Every branch produces a :class:`SummaryResponse` (status code + JSON body)
instead of raising, so the HTTP layer only has to serialize it.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from ..config import Settings
from ..domain.models import LeaseStatus, SessionStatus
from ..infrastructure.store import StoreError, SummaryStore
from ..observability.metrics import SUMMARY_OUTCOMES
from . import generation_client as gen
from .audit import AuditLogger
from .generation_client import GenerationClient
from .json_repair import REASON_UNREPAIRABLE, dumps_summary, loads_summary, repair_summary
from .lease import LeaseCoordinator
from .persistence import PersistenceError, SummaryWriter
from .prompt_builder import (
    ANSWERS_CHAR_BUDGET,
    FIX_MAX_OUTPUT_TOKENS,
    FIX_TEMPERATURE,
    build_fix_prompt,
    build_summary_prompt,
    compact_answers,
)
from .tone import select_tone

LOG = logging.getLogger("aligna")

SOURCE_SHARED_CACHE = "shared_cache"
SOURCE_GENERATED = "generated"
SOURCE_PLACEHOLDER = "placeholder"


@dataclass(frozen=True)
class SummaryResponse:
    status_code: int
    body: Dict[str, Any]
    headers: Dict[str, str] = field(default_factory=dict)
    outcome: str = ""


def _error(status_code: int, error: str, outcome: str, details: Any = None, **extra: Any) -> SummaryResponse:
    body: Dict[str, Any] = {"error": error}
    if details is not None or status_code >= 500:
        body["details"] = details
    body.update(extra)
    return SummaryResponse(status_code, body, outcome=outcome)


def _ready(summary: Dict[str, Any], source: str, note: Optional[str] = None) -> SummaryResponse:
    body: Dict[str, Any] = {"ok": True, "summary": summary, "source": source}
    if note:
        body["note"] = note
    return SummaryResponse(200, body, outcome=source)


def _generating(note: str, outcome: str) -> SummaryResponse:
    return SummaryResponse(202, {"ok": False, "status": LeaseStatus.GENERATING.value, "note": note}, outcome=outcome)


class SummaryOrchestrator:
    def __init__(
        self,
        store: SummaryStore,
        generator: GenerationClient,
        *,
        audit: Optional[AuditLogger] = None,
        writer: Optional[SummaryWriter] = None,
        lease: Optional[LeaseCoordinator] = None,
        lease_seconds: int = 180,
        answers_char_budget: int = ANSWERS_CHAR_BUDGET,
    ) -> None:
        self._store = store
        self._generator = generator
        self._audit = audit or AuditLogger(store)
        self._writer = writer or SummaryWriter(store)
        self._lease = lease or LeaseCoordinator(store, self._writer, lease_seconds=lease_seconds)
        self._answers_char_budget = answers_char_budget

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: SummaryStore,
        generator: Optional[GenerationClient] = None,
    ) -> "SummaryOrchestrator":
        return cls(
            store,
            generator or GenerationClient.from_settings(settings),
            lease_seconds=settings.lease_seconds,
            answers_char_budget=settings.answers_char_budget,
        )

    def run(self, session_id: str, user_id: str) -> SummaryResponse:
        response = self._run(session_id, user_id)
        SUMMARY_OUTCOMES.labels(outcome=response.outcome or str(response.status_code)).inc()
        return response

    # ------------------------------------------------------------------
    # Flow
    # ------------------------------------------------------------------
    def _run(self, session_id: str, user_id: str) -> SummaryResponse:
        def log(event: str, details: Optional[Dict[str, Any]] = None) -> None:
            self._audit.log(session_id, user_id, event, details)

        cached = self._cached_summary(session_id)
        if cached is not None:
            log("already_ready", {"source": SOURCE_SHARED_CACHE})
            return _ready(loads_summary(cached), SOURCE_SHARED_CACHE)

        try:
            entitled = self._store.has_entitlement(user_id)
        except StoreError as exc:
            return _error(500, "Failed to check entitlement", "entitlement_failed", exc.message)
        if not entitled:
            return _error(403, "Pro required", "forbidden")

        try:
            session = self._store.get_session(session_id)
        except StoreError as exc:
            return _error(500, "Failed to load session", "session_failed", exc.message)
        if session is None:
            return _error(404, "Session not found", "not_found")
        if session.status != SessionStatus.COMPLETED.value:
            return _error(
                409,
                "Session not completed",
                "not_completed",
                "AI summary is only available after completion.",
            )

        try:
            responses = self._store.list_responses(session_id)
        except StoreError as exc:
            log("responses_failed", {"body": exc.message[:500]})
            return _error(500, "Failed to load responses", "responses_failed", exc.message)

        try:
            claim = self._lease.claim(session_id, user_id)
        except StoreError as exc:
            LOG.error("claim failed: %s", exc.message)
            log("claim_failed")
            return _error(500, "Failed to claim generation lock", "claim_failed", exc.message)

        if not claim.claimed:
            log("already_generating", {"current_status": claim.current_status})
            if claim.current_status == LeaseStatus.READY.value and claim.existing_summary:
                return _ready(loads_summary(claim.existing_summary), SOURCE_SHARED_CACHE)
            return _generating("Summary is being generated by another request.", "contended")

        token = claim.locked_until
        log("claimed")
        self._best_effort(lambda: self._lease.begin(session_id, user_id, token))

        metrics = self._metrics(session_id)
        decision = select_tone(metrics)
        LOG.info("tone_profile: %s %s", decision.tone.value, decision.rationale)
        log("tone_selected", {"tone": decision.tone.value, "rationale": decision.rationale})

        prompt = build_summary_prompt(
            session.status,
            compact_answers(responses),
            metrics,
            decision.tone,
            char_budget=self._answers_char_budget,
        )
        outcome = self._generator.generate(prompt)

        if outcome.kind == gen.PENDING:
            log("generation_pending", {"note": str(outcome.raw or "")[:200]})
            self._best_effort(lambda: self._lease.keep_generating(session_id, user_id, token))
            return _generating("Generation is taking longer; please poll.", "pending")

        if outcome.kind == gen.RATE_LIMITED:
            retry_after = outcome.retry_after_seconds
            log("rate_limited", {"retryAfterSeconds": retry_after})
            self._best_effort(
                lambda: self._lease.mark_error(session_id, user_id, f"Rate limit exceeded. Retry in ~{retry_after}s.", token)
            )
            try:
                details: Any = json.loads(outcome.raw or "")
            except ValueError:
                details = outcome.raw
            return SummaryResponse(
                429,
                {"error": "Generation rate limited", "retryAfterSeconds": retry_after, "details": details},
                headers={"Retry-After": str(retry_after)},
                outcome="rate_limited",
            )

        if not outcome.ok:
            raw = str(outcome.raw or "unknown")
            log("generation_failed", {"status": outcome.status, "raw": raw[:500]})
            self._best_effort(lambda: self._lease.mark_error(session_id, user_id, f"Generation failed: {raw}", token))
            return _error(500, "Generation failed", "generation_failed", outcome.raw)

        result = repair_summary(outcome.text, self._corrector)
        if result.is_placeholder:
            event = "json_repair_failed" if result.reason == REASON_UNREPAIRABLE else "json_invalid_after_repair"
            log(event, {"model": outcome.model})
        summary_text = dumps_summary(result.summary)

        try:
            self._writer.save_user_summary(session_id, user_id, summary_text, metrics)
        except PersistenceError as exc:
            log("save_failed", {"details": exc.details})
            self._best_effort(
                lambda: self._lease.mark_error(session_id, user_id, f"Failed to save per-user summary: {exc.details or 'unknown'}", token)
            )
            return _error(500, "Failed to save summary", "save_failed", exc.details)

        try:
            applied = self._lease.mark_ready(session_id, user_id, summary_text, metrics, token)
        except PersistenceError as exc:
            log("shared_save_failed", {"details": exc.details})
            self._best_effort(
                lambda: self._lease.mark_error(session_id, user_id, f"Failed to save shared summary: {exc.details or 'unknown'}", token)
            )
            return _error(500, "Failed to save summary", "save_failed", exc.details)
        if not applied:
            log("stale_lease", {"action": "mark_ready"})

        log("saved", {"kind": "placeholder" if result.is_placeholder else "final", "model": outcome.model})
        if result.is_placeholder:
            return _ready(result.summary, SOURCE_PLACEHOLDER, note="Fallback summary returned")
        return _ready(result.summary, SOURCE_GENERATED)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _cached_summary(self, session_id: str) -> Optional[str]:
        try:
            lease = self._store.get_lease(session_id)
        except StoreError as exc:
            LOG.warning("shared summary lookup failed: %s", exc.message)
            return None
        if lease is not None and lease.summary and lease.summary.strip():
            return lease.summary
        return None

    def _metrics(self, session_id: str) -> Optional[Dict[str, Any]]:
        try:
            return self._store.get_compatibility_metrics(session_id)
        except StoreError as exc:
            LOG.error("metrics lookup failed: %s", exc.message)
            return None

    def _corrector(self, broken: str) -> Optional[str]:
        fixed = self._generator.generate(
            build_fix_prompt(broken),
            temperature=FIX_TEMPERATURE,
            max_output_tokens=FIX_MAX_OUTPUT_TOKENS,
        )
        return fixed.text if fixed.ok else None

    @staticmethod
    def _best_effort(write: Callable[[], Any]) -> None:
        try:
            write()
        except PersistenceError as exc:
            LOG.error("lease update failed: %s (%s)", exc, exc.details)
