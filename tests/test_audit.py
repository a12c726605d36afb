from src.aligna.services import audit
from src.aligna.services.audit import AuditLogger, list_recent_events


class ExplodingStore:
    def append_audit_event(self, event):
        raise RuntimeError("audit table offline")


def test_event_recorded_in_store_and_buffer(store):
    AuditLogger(store).log("s1", "u1", "claimed", {"attempt": 1})

    events = store.audit_events()
    assert [e.event for e in events] == ["claimed"]
    assert events[0].details == {"attempt": 1}
    assert list_recent_events(1)[0].event == "claimed"


def test_store_failure_never_reaches_caller():
    AuditLogger(ExplodingStore()).log("s1", "u1", "saved")
    assert list_recent_events(1)[0].event == "saved"


def test_logger_without_store():
    AuditLogger(None).log("s1", "u1", "tone_selected", {"tone": "BALANCED_GROWTH"})
    assert list_recent_events(1)[0].details == {"tone": "BALANCED_GROWTH"}


def test_buffer_is_bounded(monkeypatch):
    monkeypatch.setattr(audit, "_RECENT_EVENTS", [])
    logger = AuditLogger(None)
    for i in range(audit._MAX_BUFFER + 5):
        logger.log("s1", "u1", f"e{i}")
    assert len(audit._RECENT_EVENTS) == audit._MAX_BUFFER
    assert list_recent_events(1)[0].event == f"e{audit._MAX_BUFFER + 4}"
    assert list_recent_events(0) == []


def test_events_are_published(monkeypatch):
    published = []
    monkeypatch.setattr(audit, "publish_event", lambda event, payload: published.append((event, payload)))

    AuditLogger(None).log("s1", "u1", "rate_limited", {"retryAfterSeconds": 7})

    assert published[0][0] == "rate_limited"
    assert published[0][1]["session_id"] == "s1"
    assert published[0][1]["details"] == {"retryAfterSeconds": 7}
