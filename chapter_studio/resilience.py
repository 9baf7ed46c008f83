"""Retry, backend fallback and relay fallback for remote calls."""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Tuple, TypeVar
from urllib.parse import quote, urlparse

import requests
from rich.console import Console

from chapter_studio.config import RetryConfig


console = Console()

T = TypeVar("T")

RETRYABLE_STATUS_CODES = {429, 503, 529}
RETRYABLE_STATUS_NAMES = {"unavailable", "resource_exhausted"}
RETRYABLE_MARKERS = (
    "overloaded",
    "rate limit",
    "too many requests",
    "unavailable",
    "resource_exhausted",
    "resource exhausted",
)


class ChapterStudioError(Exception):
    """Base class for errors raised by Chapter Studio."""


class RemoteCallError(ChapterStudioError):
    """A remote call failed permanently or ran out of retries."""

    def __init__(self, message: str, attempts: int = 1, retryable: bool = False):
        super().__init__(message)
        self.attempts = attempts
        self.retryable = retryable


class FallbackExhaustedError(ChapterStudioError):
    """Both the primary and the secondary backend failed."""

    def __init__(self, primary_error: Exception, secondary_error: Exception):
        super().__init__(
            f"Primary backend failed: {primary_error}. Secondary backend failed: {secondary_error}"
        )
        self.primary_error = primary_error
        self.secondary_error = secondary_error


class InvalidResponseError(ChapterStudioError):
    """A response arrived but its body is not the content that was asked for."""


class FetchFallbackError(ChapterStudioError):
    """Every access path for a URL failed."""

    def __init__(self, url: str, last_error: Optional[Exception], attempted: List[str]):
        super().__init__(
            f"Could not fetch {url} after {len(attempted)} access path(s); last error: {last_error}"
        )
        self.url = url
        self.last_error = last_error
        self.attempted = attempted


class StructuredOutputError(ChapterStudioError):
    """The text service kept returning malformed structured output."""


def error_status_code(error: BaseException) -> Optional[int]:
    """Extract an HTTP-like status code from an exception, if it carries one."""
    for attr in ("status_code", "status", "code"):
        value = getattr(error, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        if isinstance(value, str) and value.isdigit():
            return int(value)

    response = getattr(error, "response", None)
    if response is not None:
        code = getattr(response, "status_code", None)
        if isinstance(code, int):
            return code
    return None


def is_retryable_error(error: BaseException) -> bool:
    """Decide whether an error is transient and worth another attempt."""
    if isinstance(error, ChapterStudioError):
        return False

    if isinstance(error, (asyncio.TimeoutError, TimeoutError, requests.Timeout, requests.ConnectionError)):
        return True

    if error_status_code(error) in RETRYABLE_STATUS_CODES:
        return True

    status = getattr(error, "status", None)
    if isinstance(status, str) and status.lower() in RETRYABLE_STATUS_NAMES:
        return True

    message = str(error).lower()
    return any(marker in message for marker in RETRYABLE_MARKERS)


def backoff_delays(max_attempts: int, initial_delay_ms: int) -> List[float]:
    """Delays in seconds slept between attempts of a fully failing call."""
    return [initial_delay_ms * 2 ** (attempt - 1) / 1000 for attempt in range(1, max_attempts)]


async def call_with_retries(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    initial_delay_ms: int = 1000,
    timeout: Optional[float] = None,
    label: str = "remote call",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await an operation, retrying transient failures with exponential backoff.

    Args:
        operation: Zero-argument callable returning a fresh awaitable per attempt.
        max_attempts: Total attempts including the first one.
        initial_delay_ms: Delay before the second attempt; doubles afterwards.
        timeout: Optional per-attempt timeout in seconds. A timeout is retryable.
        label: Name used in log lines and error messages.
        sleep: Awaitable sleep, injectable for tests.

    Returns:
        The operation's result.

    Raises:
        RemoteCallError: On a non-retryable error or once attempts run out.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            if timeout:
                return await asyncio.wait_for(operation(), timeout)
            return await operation()
        except Exception as e:
            retryable = is_retryable_error(e)
            if retryable and attempt < max_attempts:
                delay = initial_delay_ms * 2 ** (attempt - 1) / 1000
                console.print(
                    f"[yellow]{label}: attempt {attempt}/{max_attempts} failed ({e}), "
                    f"retrying in {delay:.1f}s[/yellow]"
                )
                await sleep(delay)
                continue

            reason = "retries exhausted" if retryable else "non-retryable error"
            raise RemoteCallError(
                f"{label} failed after {attempt} attempt(s) ({reason}): {str(e) or type(e).__name__}",
                attempts=attempt,
                retryable=retryable,
            ) from e


async def generate_with_fallback(
    primary: Callable[[], Awaitable[T]],
    secondary: Optional[Callable[[], Awaitable[T]]] = None,
    max_attempts: int = 3,
    initial_delay_ms: int = 1000,
    timeout: Optional[float] = None,
    label: str = "generation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run the primary backend with retries, then the secondary if it gives up.

    Raises:
        RemoteCallError: The primary failed and no secondary is configured.
        FallbackExhaustedError: Both backends failed.
    """
    try:
        return await call_with_retries(
            primary, max_attempts, initial_delay_ms, timeout, f"{label} (primary)", sleep
        )
    except RemoteCallError as primary_error:
        if secondary is None:
            raise
        console.print(f"[yellow]{label}: primary backend failed, switching to secondary[/yellow]")
        try:
            return await call_with_retries(
                secondary, max_attempts, initial_delay_ms, timeout, f"{label} (secondary)", sleep
            )
        except RemoteCallError as secondary_error:
            raise FallbackExhaustedError(primary_error, secondary_error) from secondary_error


@dataclass
class FetchResponse:
    """A validated response from one of the access paths."""
    source_url: str
    fetched_url: str
    via: str
    content: bytes
    content_type: str

    @property
    def size(self) -> int:
        return len(self.content)


def access_paths(url: str, retry: RetryConfig) -> List[Tuple[str, str]]:
    """Ordered (label, url) pairs tried by fetch_with_fallback."""
    encoded = quote(url, safe="")
    paths = [("direct", url)]
    if retry.local_relay_url:
        paths.append(("local relay", f"{retry.local_relay_url}?url={encoded}"))
    for template in retry.relay_templates:
        paths.append((urlparse(template).netloc or template, template.format(url=encoded)))
    return paths


def invalid_content_reason(
    content: bytes,
    content_type: str,
    min_bytes: int,
    expect_binary: bool,
) -> Optional[str]:
    """Return why a body is unusable, or None when it looks valid."""
    content_type = (content_type or "").lower()
    head = content[:64].lstrip().lower()

    if "text/html" in content_type or head.startswith(b"<!doctype html") or head.startswith(b"<html"):
        return "received an HTML page instead of media"
    if expect_binary and "application/json" in content_type:
        return "received JSON instead of media"
    if len(content) < min_bytes:
        return f"body too small ({len(content)} bytes)"
    return None


def _http_get(url: str, timeout: float, session: Optional[requests.Session]) -> requests.Response:
    getter = session.get if session is not None else requests.get
    resp = getter(url, timeout=timeout)
    resp.raise_for_status()
    return resp


async def fetch_with_fallback(
    url: str,
    retry: Optional[RetryConfig] = None,
    min_bytes: Optional[int] = None,
    expect_binary: bool = True,
    session: Optional[requests.Session] = None,
) -> FetchResponse:
    """Fetch a URL directly, then through the local relay and public relays.

    Args:
        url: Resource to download.
        retry: Timeouts and relay list. Defaults to RetryConfig().
        min_bytes: Smallest acceptable body. Defaults to retry.min_media_bytes.
        expect_binary: Reject JSON bodies as well as HTML.
        session: Optional requests session.

    Returns:
        The first response that passes validation.

    Raises:
        FetchFallbackError: When every access path fails.
    """
    retry = retry or RetryConfig()
    if min_bytes is None:
        min_bytes = retry.min_media_bytes

    last_error: Optional[Exception] = None
    attempted: List[str] = []

    for via, candidate in access_paths(url, retry):
        attempted.append(via)
        try:
            resp = await asyncio.to_thread(_http_get, candidate, retry.http_timeout_seconds, session)
        except requests.RequestException as e:
            last_error = e
            console.print(f"[dim]Fetch via {via} failed for {url}: {e}[/dim]")
            continue

        content_type = resp.headers.get("content-type", "")
        reason = invalid_content_reason(resp.content, content_type, min_bytes, expect_binary)
        if reason:
            last_error = InvalidResponseError(f"{via}: {reason}")
            console.print(f"[dim]Fetch via {via} rejected for {url}: {reason}[/dim]")
            continue

        return FetchResponse(
            source_url=url,
            fetched_url=candidate,
            via=via,
            content=resp.content,
            content_type=content_type,
        )

    raise FetchFallbackError(url, last_error, attempted)
