import sys
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)


class FakeResponse:
    def __init__(self, status_code=200, text=""):
        self.status_code = status_code
        self.text = text
        self.closed = False

    @property
    def ok(self):
        return 200 <= self.status_code < 400

    def close(self):
        self.closed = True


class FakeSession:
    """Scripted stand-in for ``requests.Session``.

    Each call to ``request`` consumes the next scripted item: a response is
    returned, an exception instance is raised.
    """

    def __init__(self, *script):
        self.script = list(script)
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        if not self.script:
            raise AssertionError(f"unexpected request {method} {url}")
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


class MutableClock:
    def __init__(self, start=None):
        self.current = start or datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self):
        return self.current

    def advance(self, seconds):
        self.current += timedelta(seconds=seconds)


class ScriptedGenerator:
    """Duck-typed generation client returning queued outcomes in order."""

    def __init__(self, *outcomes, on_generate=None):
        self.outcomes = list(outcomes)
        self.calls = []
        self.on_generate = on_generate

    def generate(self, prompt, *, temperature=0.4, max_output_tokens=4096):
        self.calls.append({"prompt": prompt, "temperature": temperature, "max_output_tokens": max_output_tokens})
        if self.on_generate is not None:
            self.on_generate(len(self.calls))
        if not self.outcomes:
            raise AssertionError("generator called more times than scripted")
        return self.outcomes.pop(0)


@pytest.fixture
def make_response():
    return FakeResponse


@pytest.fixture
def make_session():
    return FakeSession


@pytest.fixture
def make_generator():
    return ScriptedGenerator


@pytest.fixture
def clock():
    return MutableClock()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def store(clock):
    from src.aligna.infrastructure.store import InMemorySummaryStore

    return InMemorySummaryStore(clock=clock)


@pytest.fixture
def seeded_store(store):
    """Completed session ``s1`` between ``u1`` and ``u2``, both entitled."""
    from src.aligna.domain.models import PairSession, ResponseRow

    store.add_session(PairSession(id="s1", created_by="u1", partner_id="u2", status="completed"))
    store.add_session(PairSession(id="s-open", created_by="u1", partner_id="u2", status="pending"))
    store.add_responses(
        "s1",
        [
            ResponseRow(session_id="s1", user_id="u1", question_id="q1", value="3"),
            ResponseRow(session_id="s1", user_id="u2", question_id="q1", value="5"),
            ResponseRow(session_id="s1", user_id="u1", question_id="q2", value="weekends together"),
        ],
    )
    store.grant_entitlement("u1", "ios", "tx-u1")
    store.grant_entitlement("u2", "android", "tx-u2")
    return store
