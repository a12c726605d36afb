"""Purchase webhook that grants the lifetime entitlement.

RevenueCat posts an event per store transaction; only ownership-implying
event types that carry the configured entitlement are written.
"""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Header, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ...config import Settings
from ...infrastructure.store import StoreError, SummaryStore
from ..deps import get_settings, get_summary_store

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

GRANT_TYPES = frozenset(
    {
        "INITIAL_PURCHASE",
        "NON_RENEWING_PURCHASE",
        "RENEWAL",
        "UNCANCELLATION",
        "PRODUCT_CHANGE",
        "TRANSFER",
        "TEST",
    }
)

_PLATFORMS = {"app_store": "ios", "play_store": "android", "stripe": "web"}


class RevenueCatEvent(BaseModel):
    type: Optional[str] = None
    app_user_id: Optional[str] = None
    product_id: Optional[str] = None
    entitlement_ids: Optional[List[str]] = None
    transaction_id: Optional[str] = None
    original_transaction_id: Optional[str] = None
    store: Optional[str] = None
    environment: Optional[str] = None


class RevenueCatPayload(BaseModel):
    api_version: Optional[str] = None
    event: Optional[RevenueCatEvent] = None


def map_platform(store: Optional[str]) -> str:
    return _PLATFORMS.get((store or "").lower(), "unknown")


def is_authorized(header: Optional[str], secret: str) -> bool:
    value = (header or "").strip()
    return value in (secret, f"Bearer {secret}", f"bearer {secret}")


@router.post("/revenuecat")
def revenuecat_webhook(
    payload: RevenueCatPayload,
    authorization: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
    store: SummaryStore = Depends(get_summary_store),
) -> JSONResponse:
    secret = settings.webhook_secret
    if not secret:
        return JSONResponse({"error": "Missing REVENUECAT_WEBHOOK_SECRET"}, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

    if not is_authorized(authorization, secret):
        return JSONResponse(
            {
                "error": "Unauthorized",
                "hint": "Send the webhook secret as the Authorization header, raw or as 'Bearer <secret>'.",
                "got": authorization,
            },
            status_code=status.HTTP_401_UNAUTHORIZED,
        )

    event = payload.event or RevenueCatEvent()
    event_type = event.type or ""
    app_user_id = event.app_user_id or ""
    entitlement_ids = event.entitlement_ids or []

    has_entitlement = settings.entitlement_id in entitlement_ids
    if not (has_entitlement and event_type in GRANT_TYPES):
        return JSONResponse(
            {
                "ok": True,
                "ignored": True,
                "reason": "event_type_not_granting" if has_entitlement else "missing_entitlement",
                "type": event_type,
                "entitlementIds": entitlement_ids,
                "appUserId": app_user_id or None,
            }
        )

    if not app_user_id:
        return JSONResponse({"error": "Missing app_user_id"}, status_code=status.HTTP_400_BAD_REQUEST)

    platform = map_platform(event.store)
    tx = (
        event.transaction_id
        or event.original_transaction_id
        or f"{platform}:{app_user_id}:{settings.entitlement_id}:{event_type}"
    )

    try:
        store.grant_entitlement(app_user_id, platform, tx)
    except StoreError as exc:
        return JSONResponse({"error": "Insert failed", "details": exc.message}, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

    return JSONResponse(
        {"ok": True, "granted": True, "appUserId": app_user_id, "tx": tx, "type": event_type, "platform": platform}
    )
