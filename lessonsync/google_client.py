from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any
from urllib.parse import quote

from lessonsync.errors import AuthError
from lessonsync.models import Attendee, CanonicalEvent, GoogleCalendarConfig, SourceName, parse_iso_datetime
from lessonsync.sources import get_json, is_lesson_event


logger = logging.getLogger(__name__)

BRAND_KEYWORDS = ("google calendar",)


def _parse_event_time(value: Any) -> datetime | None:
    if not isinstance(value, dict):
        return None
    raw = value.get("dateTime") or value.get("date")
    if not raw:
        return None
    text = str(raw).strip()
    if len(text) == 10:
        # All-day events carry a bare date.
        return parse_iso_datetime(date.fromisoformat(text))
    return parse_iso_datetime(text)


def _attendee(value: Any) -> Attendee | None:
    if not isinstance(value, dict):
        return None
    email = str(value.get("email", "") or "").strip()
    name = str(value.get("displayName", "") or "").strip()
    if not email and not name:
        return None
    return Attendee(email=email, display_name=name)


def google_item_to_event(item: dict[str, Any]) -> CanonicalEvent | None:
    event_id = str(item.get("id", "") or "").strip()
    start = _parse_event_time(item.get("start"))
    if not event_id or start is None:
        return None
    attendees = [a for a in (_attendee(raw) for raw in item.get("attendees", []) or []) if a is not None]
    return CanonicalEvent(
        external_id=event_id,
        title=str(item.get("summary", "") or "").strip() or "Untitled Event",
        start_time=start,
        end_time=_parse_event_time(item.get("end")),
        location=str(item.get("location", "") or "").strip() or None,
        attendees=attendees,
        organizer=_attendee(item.get("organizer")),
        source_name=SourceName.GOOGLE_CALENDAR,
        raw_link=str(item.get("htmlLink", "") or "").strip() or None,
        description=str(item.get("description", "") or ""),
    )


class GoogleCalendarSource:
    source_name = SourceName.GOOGLE_CALENDAR

    def __init__(self, config: GoogleCalendarConfig) -> None:
        self.config = config

    def is_configured(self) -> bool:
        return bool(self.config.access_token)

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.config.access_token}"}

    def _events_endpoint(self) -> str:
        calendar_id = quote(self.config.calendar_id or "primary", safe="")
        return f"{self.config.base_url.rstrip('/')}/calendars/{calendar_id}/events"

    def fetch_events(self, time_min: datetime, time_max: datetime) -> list[CanonicalEvent]:
        if not self.is_configured():
            raise AuthError("Google Calendar access token is not configured.", source=self.source_name.value)
        window_start = parse_iso_datetime(time_min)
        window_end = parse_iso_datetime(time_max)
        params: dict[str, Any] = {
            "timeMin": window_start.isoformat(),
            "timeMax": window_end.isoformat(),
            "singleEvents": "true",
            "showDeleted": "false",
            "orderBy": "startTime",
            "maxResults": self.config.page_size,
        }
        events: list[CanonicalEvent] = []
        pages = 0
        while True:
            payload = get_json(
                self._events_endpoint(),
                source=self.source_name,
                headers=self._headers(),
                params=params,
                timeout=self.config.timeout_seconds,
            )
            pages += 1
            for item in payload.get("items", []) or []:
                if not isinstance(item, dict) or item.get("status") == "cancelled":
                    continue
                event = google_item_to_event(item)
                # timeMin bounds the end time, so events already underway come back too.
                if event is not None and window_start <= event.start_time < window_end:
                    events.append(event)
            page_token = str(payload.get("nextPageToken", "") or "")
            if not page_token:
                break
            params = {**params, "pageToken": page_token}
        logger.info("Fetched %d Google Calendar events in %d page(s)", len(events), pages)
        return events

    def is_lesson_event(self, event: CanonicalEvent) -> bool:
        return is_lesson_event(event, BRAND_KEYWORDS)
