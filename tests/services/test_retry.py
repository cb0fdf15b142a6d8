import threading

import pytest
import requests

from mxtester.errors import TesterError
from mxtester.services.retry import auto_retry, backoff_seconds, is_transient_error


class DummyLogger:
    def debug(self, *_args, **_kwargs):
        return None


class FlakySend:
    def __init__(self, failures, error_factory):
        self.failures = failures
        self.error_factory = error_factory
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error_factory()
        return "ok"


def test_auto_retry_returns_after_transient_failures():
    sleeps = []
    send = FlakySend(2, lambda: requests.ConnectionError("refused"))

    result = auto_retry(send, 10, DummyLogger(), sleep=sleeps.append, uniform=lambda low, high: 1.0)

    assert result == "ok"
    assert send.calls == 3
    assert sleeps == [1.0, 4.0]


def test_auto_retry_gives_up_after_max_attempts():
    sleeps = []
    send = FlakySend(100, lambda: requests.Timeout("slow"))

    with pytest.raises(requests.Timeout):
        auto_retry(send, 3, DummyLogger(), sleep=sleeps.append, uniform=lambda low, high: 0.5)

    assert send.calls == 3
    assert len(sleeps) == 2


def test_auto_retry_does_not_retry_other_errors():
    sleeps = []
    send = FlakySend(1, lambda: ValueError("bad payload"))

    with pytest.raises(ValueError):
        auto_retry(send, 10, DummyLogger(), sleep=sleeps.append)

    assert send.calls == 1
    assert sleeps == []


def test_auto_retry_stops_once_cancelled():
    cancelled = threading.Event()
    send = FlakySend(100, lambda: requests.ConnectionError("refused"))

    with pytest.raises(TesterError, match="cancelled before attempt 2"):
        auto_retry(send, 10, DummyLogger(), sleep=lambda _s: cancelled.set(), cancelled=cancelled)

    assert send.calls == 1


def test_transient_error_classification():
    assert is_transient_error(requests.ConnectionError())
    assert is_transient_error(requests.Timeout())
    assert is_transient_error(requests.exceptions.ChunkedEncodingError())
    assert not is_transient_error(requests.HTTPError())
    assert not is_transient_error(RuntimeError())


def test_backoff_grows_quadratically_within_interval():
    assert backoff_seconds(1, lambda low, high: low) == pytest.approx(0.3)
    assert backoff_seconds(3, lambda low, high: high) == pytest.approx(9.0)
