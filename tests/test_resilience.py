import asyncio

import pytest
import requests

from chapter_studio import resilience
from chapter_studio.config import RetryConfig
from chapter_studio.resilience import (
    FallbackExhaustedError, FetchFallbackError, RemoteCallError, backoff_delays, call_with_retries,
    fetch_with_fallback, generate_with_fallback, is_retryable_error,
)


class StatusError(Exception):
    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = status_code


class FakeResponse:
    def __init__(self, content: bytes, content_type: str = "audio/mpeg", status: int = 200):
        self.content = content
        self.headers = {"content-type": content_type}
        self.status_code = status

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error", response=self)


class Recorder:
    def __init__(self):
        self.delays = []

    async def sleep(self, delay: float) -> None:
        self.delays.append(delay)


def test_retryable_errors_wait_for_exponential_backoff():
    recorder = Recorder()
    attempts = []

    async def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise StatusError("model overloaded", 503)
        return "done"

    result = asyncio.run(call_with_retries(flaky, max_attempts=3, initial_delay_ms=1000, sleep=recorder.sleep))

    assert result == "done"
    assert len(attempts) == 3
    assert recorder.delays == [1.0, 2.0]
    assert sum(recorder.delays) == sum(backoff_delays(3, 1000))


def test_non_retryable_error_raises_without_delay():
    recorder = Recorder()

    async def rejected():
        raise StatusError("invalid argument", 400)

    with pytest.raises(RemoteCallError) as excinfo:
        asyncio.run(call_with_retries(rejected, max_attempts=3, sleep=recorder.sleep))

    assert recorder.delays == []
    assert excinfo.value.attempts == 1
    assert excinfo.value.retryable is False
    assert isinstance(excinfo.value.__cause__, StatusError)


def test_retries_exhausted_keeps_cause():
    recorder = Recorder()

    async def always_busy():
        raise StatusError("too many requests", 429)

    with pytest.raises(RemoteCallError) as excinfo:
        asyncio.run(call_with_retries(always_busy, max_attempts=3, initial_delay_ms=500, sleep=recorder.sleep))

    assert excinfo.value.attempts == 3
    assert excinfo.value.retryable is True
    assert recorder.delays == [0.5, 1.0]


def test_timeout_counts_as_retryable():
    recorder = Recorder()
    calls = []

    async def slow_then_fast():
        calls.append(1)
        if len(calls) == 1:
            await asyncio.sleep(1)
        return "ok"

    result = asyncio.run(call_with_retries(slow_then_fast, timeout=0.05, sleep=recorder.sleep))

    assert result == "ok"
    assert recorder.delays == [1.0]


def test_is_retryable_error_classification():
    assert is_retryable_error(StatusError("x", 529))
    assert is_retryable_error(Exception("RESOURCE_EXHAUSTED: quota"))
    assert is_retryable_error(requests.ConnectionError("reset"))
    assert not is_retryable_error(StatusError("not found", 404))
    assert not is_retryable_error(RemoteCallError("wrapped overloaded"))


def test_generate_with_fallback_switches_backend():
    recorder = Recorder()

    async def primary():
        raise StatusError("bad request", 400)

    async def secondary():
        return "from secondary"

    result = asyncio.run(generate_with_fallback(primary, secondary, sleep=recorder.sleep))
    assert result == "from secondary"


def test_generate_with_fallback_reports_both_errors():
    async def primary():
        raise StatusError("bad request", 400)

    async def secondary():
        raise StatusError("forbidden", 403)

    with pytest.raises(FallbackExhaustedError) as excinfo:
        asyncio.run(generate_with_fallback(primary, secondary))

    assert "bad request" in str(excinfo.value.primary_error)
    assert "forbidden" in str(excinfo.value.secondary_error)


def test_generate_with_fallback_without_secondary_reraises():
    async def primary():
        raise StatusError("bad request", 400)

    with pytest.raises(RemoteCallError):
        asyncio.run(generate_with_fallback(primary))


def test_fetch_falls_back_to_relay_after_html(monkeypatch):
    seen = []

    def fake_get(url, timeout):
        seen.append(url)
        if len(seen) == 1:
            return FakeResponse(b"<!DOCTYPE html><html>blocked</html>", "text/html")
        return FakeResponse(b"ID3" + b"\x00" * 2000)

    monkeypatch.setattr(resilience.requests, "get", fake_get)
    retry = RetryConfig()

    response = asyncio.run(fetch_with_fallback("https://cdn.example/a.mp3", retry))

    assert response.via == "local relay"
    assert seen[0] == "https://cdn.example/a.mp3"
    assert seen[1].startswith(retry.local_relay_url)
    assert response.size == 2003


def test_fetch_reports_every_attempted_path(monkeypatch):
    def fake_get(url, timeout):
        raise requests.ConnectionError("offline")

    monkeypatch.setattr(resilience.requests, "get", fake_get)
    retry = RetryConfig()

    with pytest.raises(FetchFallbackError) as excinfo:
        asyncio.run(fetch_with_fallback("https://cdn.example/a.mp3", retry))

    assert len(excinfo.value.attempted) == 2 + len(retry.relay_templates)
    assert isinstance(excinfo.value.last_error, requests.ConnectionError)


def test_fetch_rejects_tiny_and_json_bodies(monkeypatch):
    responses = iter([
        FakeResponse(b"tiny"),
        FakeResponse(b'{"error": "nope"}' + b" " * 2000, "application/json"),
        FakeResponse(b"OggS" + b"\x00" * 1500, "audio/ogg"),
    ])
    monkeypatch.setattr(resilience.requests, "get", lambda url, timeout: next(responses))

    response = asyncio.run(fetch_with_fallback("https://cdn.example/b.ogg", RetryConfig()))

    assert response.content.startswith(b"OggS")
    assert response.via not in ("direct", "local relay")
