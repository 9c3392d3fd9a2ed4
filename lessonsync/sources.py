from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Protocol

import requests

from lessonsync.errors import AuthError, RateLimitError, TransientIOError
from lessonsync.models import CanonicalEvent, SourceName


LESSON_KEYWORDS = ("lesson", "tennis", "coaching", "session")
RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded", "quotaExceeded"}


def is_lesson_event(event: CanonicalEvent, brand_keywords: Iterable[str] = ()) -> bool:
    combined = " ".join(
        [
            str(event.title or ""),
            str(event.location or ""),
            str(event.description or ""),
        ]
    ).lower()
    keywords = [*LESSON_KEYWORDS, *(str(k).strip().lower() for k in brand_keywords)]
    return any(keyword and keyword in combined for keyword in keywords)


class EventSource(Protocol):
    source_name: SourceName

    def fetch_events(self, time_min: datetime, time_max: datetime) -> list[CanonicalEvent]:
        ...

    def is_lesson_event(self, event: CanonicalEvent) -> bool:
        ...


def _error_payload(response: requests.Response) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


def _error_text(payload: dict[str, Any], response: requests.Response) -> str:
    error = payload.get("error")
    if isinstance(error, dict):
        message = str(error.get("message", "")).strip()
        if message:
            return message
    elif error:
        return str(error)
    message = str(payload.get("message", "")).strip()
    if message:
        return message
    return (response.text or "")[:300]


def _error_reasons(payload: dict[str, Any]) -> set[str]:
    error = payload.get("error")
    if not isinstance(error, dict):
        return set()
    reasons = {str(item.get("reason", "")) for item in error.get("errors", []) or [] if isinstance(item, dict)}
    status = str(error.get("status", "")).strip()
    if status == "RESOURCE_EXHAUSTED":
        reasons.add("rateLimitExceeded")
    return reasons


def raise_for_source_status(response: requests.Response, source: SourceName) -> None:
    """Translate a provider HTTP failure into the sync error taxonomy."""
    status = response.status_code
    if status < 400:
        return
    payload = _error_payload(response)
    message = _error_text(payload, response)
    detail = f"HTTP {status}: {message}" if message else f"HTTP {status}"
    if status == 429:
        raise RateLimitError(detail, source=source.value)
    if status == 403:
        if _error_reasons(payload) & RATE_LIMIT_REASONS or "rate limit" in message.lower():
            raise RateLimitError(detail, source=source.value)
        raise AuthError(detail, source=source.value)
    if status == 401:
        raise AuthError(detail, source=source.value)
    raise TransientIOError(detail, source=source.value)


def get_json(
    url: str,
    *,
    source: SourceName,
    headers: dict[str, str],
    params: dict[str, Any] | None = None,
    timeout: int,
) -> dict[str, Any]:
    try:
        response = requests.get(url, headers=headers, params=params, timeout=timeout)
    except requests.RequestException as exc:
        raise TransientIOError(f"{type(exc).__name__}: {exc}", source=source.value) from exc
    raise_for_source_status(response, source)
    try:
        payload = response.json()
    except ValueError as exc:
        raise TransientIOError("Provider returned a non-JSON response.", source=source.value) from exc
    if not isinstance(payload, dict):
        raise TransientIOError("Provider response root must be an object.", source=source.value)
    return payload
