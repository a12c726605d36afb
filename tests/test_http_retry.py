import pytest
import requests

from src.aligna.services import http_retry
from src.aligna.services.http_retry import (
    LocalTimeoutError,
    RetryPolicy,
    TransientTransportError,
    TransportError,
    classify_failure,
    fetch_with_retry,
)


def test_retryable_status_is_retried_with_backoff(make_session, make_response, sleeps):
    first, second = make_response(503), make_response(502)
    session = make_session(first, second, make_response(200, "ok"))

    res = fetch_with_retry(session, "GET", "https://api.test/x", sleep=sleeps.append)

    assert res.status_code == 200
    assert len(session.calls) == 3
    assert sleeps == [pytest.approx(0.35), pytest.approx(0.7)]
    assert first.closed and second.closed


def test_status_budget_exhausted_returns_last_response(make_session, make_response, sleeps):
    session = make_session(make_response(429, "slow down"), make_response(429, "still"))

    res = fetch_with_retry(session, "GET", "https://api.test/x", policy=RetryPolicy(retries=1), sleep=sleeps.append)

    assert res.status_code == 429
    assert res.text == "still"
    assert len(sleeps) == 1


def test_status_retry_can_be_disabled(make_session, make_response, sleeps):
    session = make_session(make_response(503))
    policy = RetryPolicy(retries=3, retry_on_statuses=False)

    res = fetch_with_retry(session, "POST", "https://api.test/x", policy=policy, sleep=sleeps.append)

    assert res.status_code == 503
    assert sleeps == []


def test_non_retryable_status_returned_immediately(make_session, make_response, sleeps):
    session = make_session(make_response(500, "boom"))
    res = fetch_with_retry(session, "GET", "https://api.test/x", sleep=sleeps.append)
    assert res.status_code == 500
    assert len(session.calls) == 1


def test_transient_transport_failure_then_success(make_session, make_response, sleeps):
    session = make_session(requests.exceptions.ConnectionError("connection reset by peer"), make_response(200))

    res = fetch_with_retry(session, "GET", "https://api.test/x", sleep=sleeps.append)

    assert res.ok
    assert sleeps == [pytest.approx(0.35)]


def test_timeout_on_final_attempt_raises_local_timeout(make_session, sleeps):
    session = make_session(requests.exceptions.ReadTimeout("read timed out"), requests.exceptions.ReadTimeout("again"))

    with pytest.raises(LocalTimeoutError):
        fetch_with_retry(session, "GET", "https://api.test/x", policy=RetryPolicy(retries=1), sleep=sleeps.append)
    assert len(session.calls) == 2


def test_transient_failure_exhausted_raises_transient(make_session, sleeps):
    errors = [requests.exceptions.ConnectionError("connection error") for _ in range(3)]
    session = make_session(*errors)

    with pytest.raises(TransientTransportError) as info:
        fetch_with_retry(session, "GET", "https://api.test/x", policy=RetryPolicy(retries=2), sleep=sleeps.append)
    assert not isinstance(info.value, LocalTimeoutError)
    assert len(session.calls) == 3


def test_fatal_transport_failure_is_not_retried(make_session, sleeps):
    session = make_session(requests.exceptions.InvalidURL("bad url"))

    with pytest.raises(TransportError) as info:
        fetch_with_retry(session, "GET", "nope", sleep=sleeps.append)
    assert not isinstance(info.value, TransientTransportError)
    assert sleeps == []


def test_passes_timeout_and_kwargs_through(make_session, make_response):
    session = make_session(make_response(200))
    fetch_with_retry(session, "GET", "https://api.test/x", policy=RetryPolicy(timeout=3.5), params={"a": "1"})
    call = session.calls[0]
    assert call["timeout"] == 3.5
    assert call["params"] == {"a": "1"}


@pytest.mark.parametrize(
    "exc, expected",
    [
        (LocalTimeoutError("x"), http_retry.TIMEOUT),
        (TransientTransportError("x"), http_retry.TRANSIENT),
        (requests.exceptions.ConnectTimeout("connect"), http_retry.TRANSIENT),
        (requests.exceptions.ReadTimeout("read"), http_retry.TIMEOUT),
        (ConnectionResetError("reset"), http_retry.TRANSIENT),
        (RuntimeError("The signal has been aborted"), http_retry.TIMEOUT),
        (RuntimeError("network unreachable"), http_retry.TRANSIENT),
        (ValueError("boom"), http_retry.FATAL),
    ],
)
def test_classify_failure(exc, expected):
    assert classify_failure(exc) == expected


def test_delay_doubles_per_attempt():
    policy = RetryPolicy(base_delay=0.35)
    assert [policy.delay_for(i) for i in range(3)] == [pytest.approx(0.35), pytest.approx(0.7), pytest.approx(1.4)]


def test_build_session_disables_adapter_retries():
    session = http_retry.build_session()
    adapter = session.get_adapter("https://example.com")
    assert adapter.max_retries.total == 0
