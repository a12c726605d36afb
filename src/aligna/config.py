"""Runtime configuration for the summary service.

Settings are read once from the environment (``Settings.from_env``) and then
passed explicitly to every component constructor. Nothing below the API
layer reads ``os.environ`` directly.

Env vars:
- ALIGNA_STORE_IMPL: ``memory`` (default) or ``rest``
- SUPABASE_URL / SUPABASE_SERVICE_ROLE_KEY: PostgREST endpoint and key
- GEMINI_API_KEY / GEMINI_MODEL / GEMINI_BASE_URL
- ALIGNA_MODEL_FALLBACKS: comma separated models tried after GEMINI_MODEL
- ALIGNA_LEASE_SECONDS, ALIGNA_ANSWERS_CHAR_BUDGET, ALIGNA_GENERATION_TIMEOUT
- JWT_SECRET: token secret for the in-memory deployment
- REVENUECAT_WEBHOOK_SECRET, ALIGNA_ENTITLEMENT_ID
- ALIGNA_DIAGNOSTICS_TOKEN: bearer token for the diagnostics routes (unset disables them)
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import List, Mapping, Optional, Tuple

DEFAULT_MODEL = "gemini-3-flash-preview"
DEFAULT_GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
MAX_GENERATION_TIMEOUT = 120.0


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
        return value if value > 0 else default
    except ValueError:
        return default


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None:
        return default
    try:
        value = float(raw)
        return value if value > 0 else default
    except ValueError:
        return default


def _split_models(raw: str) -> Tuple[str, ...]:
    return tuple(part.strip() for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class Settings:
    store_impl: str = "memory"
    store_url: str = ""
    service_key: str = ""
    gemini_api_key: str = ""
    gemini_base_url: str = DEFAULT_GEMINI_BASE_URL
    primary_model: str = DEFAULT_MODEL
    model_fallbacks: Tuple[str, ...] = (DEFAULT_MODEL,)
    lease_seconds: int = 180
    answers_char_budget: int = 90_000
    generation_timeout: float = MAX_GENERATION_TIMEOUT
    jwt_secret: str = "dev-secret-change-me"
    webhook_secret: str = ""
    entitlement_id: str = "aligna_pro"
    diagnostics_token: str = ""

    @staticmethod
    def from_env(env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        fallbacks = _split_models(env.get("ALIGNA_MODEL_FALLBACKS", "")) or (DEFAULT_MODEL,)
        timeout = min(_env_float(env, "ALIGNA_GENERATION_TIMEOUT", MAX_GENERATION_TIMEOUT), MAX_GENERATION_TIMEOUT)
        return Settings(
            store_impl=(env.get("ALIGNA_STORE_IMPL") or "memory").strip().lower(),
            store_url=(env.get("SUPABASE_URL") or "").rstrip("/"),
            service_key=env.get("SUPABASE_SERVICE_ROLE_KEY") or "",
            gemini_api_key=env.get("GEMINI_API_KEY") or "",
            gemini_base_url=(env.get("GEMINI_BASE_URL") or DEFAULT_GEMINI_BASE_URL).rstrip("/"),
            primary_model=(env.get("GEMINI_MODEL") or DEFAULT_MODEL).strip(),
            model_fallbacks=fallbacks,
            lease_seconds=_env_int(env, "ALIGNA_LEASE_SECONDS", 180),
            answers_char_budget=_env_int(env, "ALIGNA_ANSWERS_CHAR_BUDGET", 90_000),
            generation_timeout=timeout,
            jwt_secret=env.get("JWT_SECRET") or "dev-secret-change-me",
            webhook_secret=env.get("REVENUECAT_WEBHOOK_SECRET") or "",
            entitlement_id=env.get("ALIGNA_ENTITLEMENT_ID") or "aligna_pro",
            diagnostics_token=env.get("ALIGNA_DIAGNOSTICS_TOKEN") or "",
        )

    def candidate_models(self) -> List[str]:
        """Primary model first, then fallbacks, without duplicates."""
        seen = set()
        ordered: List[str] = []
        for value in (self.primary_model, *self.model_fallbacks):
            trimmed = (value or "").strip()
            if not trimmed or trimmed in seen:
                continue
            seen.add(trimmed)
            ordered.append(trimmed)
        return ordered

    def missing(self) -> List[str]:
        """Names of required settings that are empty for the active store."""
        missing: List[str] = []
        if self.store_impl == "rest":
            if not self.store_url:
                missing.append("SUPABASE_URL")
            if not self.service_key:
                missing.append("SUPABASE_SERVICE_ROLE_KEY")
        if not self.gemini_api_key:
            missing.append("GEMINI_API_KEY")
        return missing
