from __future__ import annotations

from typing import Optional

from fastapi import Depends

from ..config import Settings
from ..infrastructure.store import SummaryStore, get_store
from ..security.identity import TokenVerifier, verifier_from_settings
from ..services.generation_client import GenerationClient
from ..services.orchestrator import SummaryOrchestrator

_settings: Optional[Settings] = None
_generator: Optional[GenerationClient] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def get_summary_store(settings: Settings = Depends(get_settings)) -> SummaryStore:
    return get_store(settings)


def get_token_verifier(settings: Settings = Depends(get_settings)) -> TokenVerifier:
    return verifier_from_settings(settings)


def get_orchestrator(
    settings: Settings = Depends(get_settings),
    store: SummaryStore = Depends(get_summary_store),
) -> SummaryOrchestrator:
    global _generator
    if _generator is None:
        _generator = GenerationClient.from_settings(settings)
    return SummaryOrchestrator.from_settings(settings, store, generator=_generator)
