import json

import pytest
import requests
from prometheus_client import REGISTRY

from src.aligna.config import Settings
from src.aligna.services import generation_client as gen
from src.aligna.services.generation_client import GenerationClient, parse_retry_delay


def _candidate(text):
    return json.dumps({"candidates": [{"content": {"parts": [{"text": text}]}}]})


def _rate_limit_body(delay):
    return json.dumps(
        {
            "error": {
                "code": 429,
                "status": "RESOURCE_EXHAUSTED",
                "details": [
                    {"@type": "type.googleapis.com/google.rpc.QuotaFailure"},
                    {"@type": "type.googleapis.com/google.rpc.RetryInfo", "retryDelay": delay},
                ],
            }
        }
    )


def _client(session, sleeps, models=("m1", "m2")):
    return GenerationClient(
        "test-key",
        list(models),
        base_url="https://gen.test/v1beta/",
        session=session,
        sleep=sleeps.append,
    )


def test_first_model_success(make_session, make_response, sleeps):
    session = make_session(make_response(200, _candidate('{"headline": "x"}')))

    outcome = _client(session, sleeps).generate("prompt")

    assert outcome.ok
    assert outcome.model == "m1"
    assert outcome.text == '{"headline": "x"}'
    call = session.calls[0]
    assert call["method"] == "POST"
    assert call["url"] == "https://gen.test/v1beta/models/m1:generateContent"
    assert call["params"] == {"key": "test-key"}
    assert call["timeout"] == 120.0
    assert call["json"]["contents"][0]["parts"][0]["text"] == "prompt"
    assert call["json"]["generationConfig"]["temperature"] == 0.4
    assert call["json"]["generationConfig"]["maxOutputTokens"] == 4096


def test_generation_parameters_are_forwarded(make_session, make_response, sleeps):
    session = make_session(make_response(200, _candidate("{}")))
    _client(session, sleeps).generate("fix", temperature=0.0, max_output_tokens=3072)
    config = session.calls[0]["json"]["generationConfig"]
    assert config["temperature"] == 0.0
    assert config["maxOutputTokens"] == 3072


def test_falls_through_to_next_model_on_error(make_session, make_response, sleeps):
    session = make_session(make_response(500, "internal"), make_response(200, _candidate("{}")))

    outcome = _client(session, sleeps).generate("prompt")

    assert outcome.ok
    assert outcome.model == "m2"
    assert sleeps == []


def test_overloaded_model_gets_one_more_call(make_session, make_response, sleeps):
    session = make_session(make_response(503, "overloaded"), make_response(200, _candidate("{}")))

    outcome = _client(session, sleeps).generate("prompt")

    assert outcome.ok
    assert outcome.model == "m1"
    assert sleeps == [pytest.approx(0.65)]
    assert [c["url"].rsplit("/", 1)[1] for c in session.calls] == ["m1:generateContent"] * 2


def test_overload_retry_failure_moves_on(make_session, make_response, sleeps):
    session = make_session(
        make_response(503, "overloaded"),
        make_response(503, "still overloaded"),
        make_response(200, _candidate("{}")),
    )

    outcome = _client(session, sleeps).generate("prompt")

    assert outcome.model == "m2"
    assert len(session.calls) == 3


def test_overload_retry_timing_out_is_pending(make_session, make_response, sleeps):
    session = make_session(
        make_response(503, "overloaded"),
        requests.exceptions.ReadTimeout("read timed out"),
        requests.exceptions.ReadTimeout("read timed out"),
    )

    outcome = _client(session, sleeps).generate("prompt")

    assert outcome.kind == gen.PENDING
    assert outcome.model == "m1"
    assert "timed out" in outcome.raw
    assert all(c["url"].endswith("m1:generateContent") for c in session.calls)


def test_rate_limit_stops_fallback_and_reads_retry_delay(make_session, make_response, sleeps):
    session = make_session(make_response(429, _rate_limit_body("7s")))

    outcome = _client(session, sleeps).generate("prompt")

    assert outcome.kind == gen.RATE_LIMITED
    assert outcome.retry_after_seconds == 7
    assert outcome.model == "m1"
    assert len(session.calls) == 1


def test_rate_limit_defaults_retry_after(make_session, make_response, sleeps):
    session = make_session(make_response(429, "quota exceeded"))
    outcome = _client(session, sleeps).generate("prompt")
    assert outcome.retry_after_seconds == 20


def test_local_timeout_is_pending_and_stops_fallback(make_session, sleeps):
    session = make_session(
        requests.exceptions.ReadTimeout("read timed out"),
        requests.exceptions.ReadTimeout("read timed out"),
    )

    outcome = _client(session, sleeps).generate("prompt")

    assert outcome.kind == gen.PENDING
    assert outcome.model == "m1"
    assert len(session.calls) == 2
    assert all(c["url"].endswith("m1:generateContent") for c in session.calls)


def test_all_models_failing_reports_last_error(make_session, make_response, sleeps):
    session = make_session(make_response(400, "bad request"), make_response(404, "no such model"))

    outcome = _client(session, sleeps).generate("prompt")

    assert outcome.kind == gen.FAILED
    assert outcome.status == 404
    assert outcome.raw == "no such model"


def test_transport_failure_falls_through(make_session, make_response, sleeps):
    session = make_session(requests.exceptions.InvalidURL("bad"), make_response(200, _candidate("{}")))
    outcome = _client(session, sleeps).generate("prompt")
    assert outcome.model == "m2"


def test_no_models_configured(make_session, sleeps):
    outcome = _client(make_session(), sleeps, models=()).generate("prompt")
    assert outcome.kind == gen.FAILED
    assert outcome.raw == "no candidate models configured"


def test_unexpected_success_body_yields_empty_text(make_session, make_response, sleeps):
    session = make_session(make_response(200, json.dumps({"candidates": []})))
    outcome = _client(session, sleeps).generate("prompt")
    assert outcome.ok
    assert outcome.text == ""


def test_model_calls_are_counted(make_session, make_response, sleeps):
    labels = {"model": "m-counted", "result": "ok"}
    before = REGISTRY.get_sample_value("aligna_model_calls_total", labels) or 0.0
    session = make_session(make_response(200, _candidate("{}")))
    _client(session, sleeps, models=("m-counted",)).generate("prompt")
    assert REGISTRY.get_sample_value("aligna_model_calls_total", labels) == before + 1


def test_from_settings_uses_candidate_models(make_session):
    settings = Settings(gemini_api_key="k", primary_model="a", model_fallbacks=("b", "a"), generation_timeout=300)
    client = GenerationClient.from_settings(settings, session=make_session())
    assert client.models == ["a", "b"]


@pytest.mark.parametrize(
    "raw, expected",
    [
        (_rate_limit_body("7s"), 7),
        (_rate_limit_body("1.5s"), 1.5),
        (_rate_limit_body("soon"), None),
        ('{"error": {"details": []}}', None),
        ("not json", None),
        (None, None),
    ],
)
def test_parse_retry_delay(raw, expected):
    assert parse_retry_delay(raw) == expected
