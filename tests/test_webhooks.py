from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from src.aligna.api import deps
from src.aligna.api.main import app
from src.aligna.api.routers.webhooks import map_platform
from src.aligna.config import Settings

WEBHOOK_SECRET = "whsec-test"


@pytest.fixture
def api(store):
    settings = Settings(gemini_api_key="g", webhook_secret=WEBHOOK_SECRET)
    app.dependency_overrides[deps.get_settings] = lambda: settings
    app.dependency_overrides[deps.get_summary_store] = lambda: store
    yield SimpleNamespace(client=TestClient(app), store=store)
    app.dependency_overrides.clear()


def _event(**overrides):
    event = {
        "type": "INITIAL_PURCHASE",
        "app_user_id": "u9",
        "product_id": "aligna_lifetime",
        "entitlement_ids": ["aligna_pro"],
        "transaction_id": "tx-123",
        "store": "APP_STORE",
    }
    event.update(overrides)
    return {"api_version": "1.0", "event": event}


def test_grants_entitlement(api):
    r = api.client.post("/webhooks/revenuecat", json=_event(), headers={"Authorization": WEBHOOK_SECRET})
    assert r.status_code == 200
    assert r.json() == {"ok": True, "granted": True, "appUserId": "u9", "tx": "tx-123", "type": "INITIAL_PURCHASE", "platform": "ios"}
    assert api.store.has_entitlement("u9")


@pytest.mark.parametrize("header", [f"Bearer {WEBHOOK_SECRET}", f"bearer {WEBHOOK_SECRET}"])
def test_bearer_forms_accepted(api, header):
    r = api.client.post("/api/webhooks/revenuecat", json=_event(), headers={"Authorization": header})
    assert r.status_code == 200


def test_wrong_secret_rejected(api):
    r = api.client.post("/webhooks/revenuecat", json=_event(), headers={"Authorization": "nope"})
    assert r.status_code == 401
    assert r.json()["error"] == "Unauthorized"
    assert "hint" in r.json()
    assert not api.store.has_entitlement("u9")


def test_missing_secret_configuration(api):
    app.dependency_overrides[deps.get_settings] = lambda: Settings()
    r = api.client.post("/webhooks/revenuecat", json=_event(), headers={"Authorization": WEBHOOK_SECRET})
    assert r.status_code == 500


def test_non_granting_event_ignored(api):
    r = api.client.post("/webhooks/revenuecat", json=_event(type="CANCELLATION"), headers={"Authorization": WEBHOOK_SECRET})
    assert r.status_code == 200
    assert r.json()["ignored"] is True
    assert r.json()["reason"] == "event_type_not_granting"
    assert not api.store.has_entitlement("u9")


def test_other_entitlement_ignored(api):
    r = api.client.post("/webhooks/revenuecat", json=_event(entitlement_ids=["other"]), headers={"Authorization": WEBHOOK_SECRET})
    assert r.json()["reason"] == "missing_entitlement"


def test_missing_app_user_id(api):
    r = api.client.post("/webhooks/revenuecat", json=_event(app_user_id=None), headers={"Authorization": WEBHOOK_SECRET})
    assert r.status_code == 400
    assert r.json() == {"error": "Missing app_user_id"}


def test_transaction_id_fallback(api):
    payload = _event(type="TEST", transaction_id=None, store="PLAY_STORE")
    r = api.client.post("/webhooks/revenuecat", json=payload, headers={"Authorization": WEBHOOK_SECRET})
    assert r.json()["tx"] == "android:u9:aligna_pro:TEST"


@pytest.mark.parametrize(
    "store, platform",
    [("APP_STORE", "ios"), ("MAC_APP_STORE", "unknown"), ("PLAY_STORE", "android"), ("STRIPE", "web"), (None, "unknown")],
)
def test_map_platform(store, platform):
    assert map_platform(store) == platform
