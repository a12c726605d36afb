"""Gemini ``generateContent`` client with per-model fallback.

Each candidate model gets one call through :func:`fetch_with_retry` with a
long deadline and status retry disabled; status codes are interpreted here:

* local timeout  -> ``pending`` at once, no other model is tried
* 503            -> short pause, one more call to the same model (a local
                    timeout on that call is also ``pending``)
* 429            -> ``rate_limited`` at once, carrying the provider's retry delay
* anything else  -> remembered, next model
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence, Union

import requests

from ..config import DEFAULT_GEMINI_BASE_URL, MAX_GENERATION_TIMEOUT, Settings
from ..observability.metrics import MODEL_CALLS
from .http_retry import LocalTimeoutError, RetryPolicy, TransportError, build_session, fetch_with_retry

LOG = logging.getLogger("aligna.llm")

OK = "ok"
PENDING = "pending"
RATE_LIMITED = "rate_limited"
FAILED = "failed"

DEFAULT_TEMPERATURE = 0.4
DEFAULT_MAX_OUTPUT_TOKENS = 4096
OVERLOAD_RETRY_DELAY = 0.65
DEFAULT_RETRY_AFTER_SECONDS = 20
RETRY_INFO_TYPE = "google.rpc.RetryInfo"

Number = Union[int, float]


@dataclass(frozen=True)
class ModelReply:
    """Result of a single call to one model."""

    ok: bool
    status: int = 0
    text: str = ""
    timed_out: bool = False


@dataclass(frozen=True)
class GenerationOutcome:
    kind: str
    model: Optional[str] = None
    text: str = ""
    status: int = 0
    raw: Optional[str] = None
    retry_after_seconds: Optional[Number] = None

    @property
    def ok(self) -> bool:
        return self.kind == OK


def parse_retry_delay(raw: Optional[str]) -> Optional[Number]:
    """Read ``retryDelay`` from a Google RPC error body (``{"error": {"details": [...]}}``)."""

    if not raw:
        return None
    try:
        body = json.loads(raw)
    except ValueError:
        return None
    error = body.get("error") if isinstance(body, dict) else None
    details = error.get("details") if isinstance(error, dict) else None
    if not isinstance(details, list):
        return None
    for entry in details:
        if not isinstance(entry, dict) or RETRY_INFO_TYPE not in str(entry.get("@type", "")):
            continue
        delay = entry.get("retryDelay")
        if isinstance(delay, str) and delay.endswith("s"):
            try:
                value = float(delay[:-1])
            except ValueError:
                return None
            return int(value) if value.is_integer() else value
        return None
    return None


def _extract_text(payload: Any) -> str:
    try:
        parts = payload["candidates"][0]["content"]["parts"]
    except (KeyError, IndexError, TypeError):
        return ""
    if not isinstance(parts, list) or not parts:
        return ""
    first = parts[0].get("text") if isinstance(parts[0], dict) else None
    if first is not None:
        return str(first)
    return "".join(str(p.get("text") or "") for p in parts if isinstance(p, dict))


class GenerationClient:
    def __init__(
        self,
        api_key: str,
        models: Sequence[str],
        *,
        base_url: str = DEFAULT_GEMINI_BASE_URL,
        timeout: float = MAX_GENERATION_TIMEOUT,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._api_key = api_key
        self.models: List[str] = list(models)
        self._base_url = base_url.rstrip("/")
        self._session = session or build_session()
        self._sleep = sleep
        self._policy = RetryPolicy(
            retries=1,
            base_delay=OVERLOAD_RETRY_DELAY,
            timeout=min(timeout, MAX_GENERATION_TIMEOUT),
            retry_on_statuses=False,
        )

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "GenerationClient":
        return cls(
            settings.gemini_api_key,
            settings.candidate_models(),
            base_url=settings.gemini_base_url,
            timeout=settings.generation_timeout,
            **kwargs,
        )

    def call_model(
        self,
        model: str,
        prompt: str,
        *,
        temperature: float = DEFAULT_TEMPERATURE,
        max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS,
    ) -> ModelReply:
        url = f"{self._base_url}/models/{model}:generateContent"
        body = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": temperature,
                "maxOutputTokens": max_output_tokens,
                "responseMimeType": "application/json",
            },
        }
        LOG.debug("model_call", extra={"model": model, "temperature": temperature})
        try:
            res = fetch_with_retry(
                self._session,
                "POST",
                url,
                policy=self._policy,
                sleep=self._sleep,
                params={"key": self._api_key},
                json=body,
            )
        except LocalTimeoutError as exc:
            MODEL_CALLS.labels(model=model, result="timeout").inc()
            return ModelReply(ok=False, text=f"request timed out locally: {exc}", timed_out=True)
        except TransportError as exc:
            MODEL_CALLS.labels(model=model, result="transport_error").inc()
            return ModelReply(ok=False, status=0, text=str(exc))

        text = res.text or ""
        if not res.ok:
            MODEL_CALLS.labels(model=model, result=str(res.status_code)).inc()
            return ModelReply(ok=False, status=res.status_code, text=text)

        MODEL_CALLS.labels(model=model, result="ok").inc()
        try:
            return ModelReply(ok=True, status=res.status_code, text=_extract_text(json.loads(text)))
        except ValueError:
            return ModelReply(ok=True, status=res.status_code, text=text)

    def generate(
        self,
        prompt: str,
        *,
        temperature: float = DEFAULT_TEMPERATURE,
        max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS,
    ) -> GenerationOutcome:
        last: Optional[ModelReply] = None

        for model in self.models:
            reply = self.call_model(model, prompt, temperature=temperature, max_output_tokens=max_output_tokens)
            if reply.ok:
                return GenerationOutcome(kind=OK, model=model, text=reply.text, status=reply.status)

            if reply.timed_out:
                LOG.warning("model_call_timed_out", extra={"model": model})
                return GenerationOutcome(kind=PENDING, model=model, raw=reply.text)

            if reply.status == 429:
                retry_after = parse_retry_delay(reply.text)
                if retry_after is None:
                    retry_after = DEFAULT_RETRY_AFTER_SECONDS
                LOG.warning("model_rate_limited", extra={"model": model, "retry_after_s": retry_after})
                return GenerationOutcome(
                    kind=RATE_LIMITED,
                    model=model,
                    status=429,
                    raw=reply.text,
                    retry_after_seconds=retry_after,
                )

            if reply.status == 503:
                self._sleep(OVERLOAD_RETRY_DELAY)
                retry = self.call_model(model, prompt, temperature=temperature, max_output_tokens=max_output_tokens)
                if retry.ok:
                    return GenerationOutcome(kind=OK, model=model, text=retry.text, status=retry.status)
                if retry.timed_out:
                    LOG.warning("model_call_timed_out", extra={"model": model, "after": 503})
                    return GenerationOutcome(kind=PENDING, model=model, raw=retry.text)
                last = retry
                LOG.info("model_overloaded_fallthrough", extra={"model": model, "status": retry.status})
                continue

            LOG.info("model_failed_fallthrough", extra={"model": model, "status": reply.status})
            last = reply

        if last is None:
            return GenerationOutcome(kind=FAILED, raw="no candidate models configured")
        return GenerationOutcome(kind=FAILED, status=last.status, raw=last.text)
