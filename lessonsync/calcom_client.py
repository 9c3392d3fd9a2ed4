from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from lessonsync.errors import AuthError
from lessonsync.models import Attendee, CalComConfig, CanonicalEvent, SourceName, parse_iso_datetime
from lessonsync.sources import get_json, is_lesson_event


logger = logging.getLogger(__name__)

BRAND_KEYWORDS = ("cal.com", "calcom")
DEFAULT_BOOKING_TITLE = "Tennis Lesson"
INACTIVE_STATUSES = {"cancelled", "canceled", "rejected"}


def _first_present(payload: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = payload.get(key)
        if value not in (None, ""):
            return value
    return None


def _person(value: Any) -> Attendee | None:
    if not isinstance(value, dict):
        return None
    email = str(value.get("email", "") or "").strip()
    name = str(value.get("name", "") or value.get("displayName", "") or "").strip()
    if not email and not name:
        return None
    return Attendee(email=email, display_name=name)


def _location_text(value: Any) -> str | None:
    if isinstance(value, dict):
        value = value.get("address") or value.get("link") or value.get("type")
    text = str(value or "").strip()
    return text or None


def booking_to_event(booking: dict[str, Any]) -> CanonicalEvent:
    """Map a Cal.com booking (API or webhook shape) to a canonical event."""
    if not isinstance(booking, dict):
        raise ValueError("booking payload must be an object")
    uid = _first_present(booking, "uid", "id", "bookingId")
    if uid is None:
        raise ValueError("booking is missing uid")
    start = parse_iso_datetime(_first_present(booking, "startTime", "start", "scheduledAt"))
    if start is None:
        raise ValueError("booking is missing start time")

    raw_attendees = booking.get("attendees") or booking.get("attendee") or []
    if isinstance(raw_attendees, dict):
        raw_attendees = [raw_attendees]
    attendees = [a for a in (_person(raw) for raw in raw_attendees) if a is not None]
    if not attendees and booking.get("email"):
        attendees = [Attendee(email=str(booking["email"]).strip(), display_name=str(booking.get("name", "") or ""))]

    organizer = _person(booking.get("organizer"))
    if organizer is None:
        hosts = booking.get("hosts") or []
        if isinstance(hosts, list) and hosts:
            organizer = _person(hosts[0])

    return CanonicalEvent(
        external_id=str(uid),
        title=str(_first_present(booking, "title", "eventTitle") or DEFAULT_BOOKING_TITLE).strip(),
        start_time=start,
        end_time=parse_iso_datetime(_first_present(booking, "endTime", "end")),
        location=_location_text(booking.get("location")),
        attendees=attendees,
        organizer=organizer,
        source_name=SourceName.CAL_DOT_COM,
        raw_link=str(booking.get("meetingUrl", "") or "").strip() or None,
        description=str(booking.get("description", "") or ""),
    )


class CalComSource:
    source_name = SourceName.CAL_DOT_COM

    def __init__(self, config: CalComConfig) -> None:
        self.config = config

    def is_configured(self) -> bool:
        return bool(self.config.api_key)

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.api_key}",
            "cal-api-version": self.config.api_version,
        }

    def fetch_events(self, time_min: datetime, time_max: datetime) -> list[CanonicalEvent]:
        if not self.is_configured():
            raise AuthError("Cal.com API key is not configured.", source=self.source_name.value)
        window_start = parse_iso_datetime(time_min)
        window_end = parse_iso_datetime(time_max)
        take = self.config.page_size
        skip = 0
        events: list[CanonicalEvent] = []
        while True:
            payload = get_json(
                f"{self.config.base_url.rstrip('/')}/bookings",
                source=self.source_name,
                headers=self._headers(),
                params={
                    "afterStart": window_start.isoformat(),
                    "beforeEnd": window_end.isoformat(),
                    "take": take,
                    "skip": skip,
                },
                timeout=self.config.timeout_seconds,
            )
            data = payload.get("data", [])
            if isinstance(data, dict):
                data = data.get("bookings", [])
            page = [item for item in data or [] if isinstance(item, dict)]
            for booking in page:
                if str(booking.get("status", "")).strip().lower() in INACTIVE_STATUSES:
                    continue
                try:
                    event = booking_to_event(booking)
                except ValueError as exc:
                    logger.warning("Skipping malformed Cal.com booking: %s", exc)
                    continue
                if window_start <= event.start_time < window_end:
                    events.append(event)
            pagination = payload.get("pagination") or {}
            has_next = pagination.get("hasNextPage") if isinstance(pagination, dict) else None
            if len(page) < take or has_next is False:
                break
            skip += take
        logger.info("Fetched %d Cal.com bookings", len(events))
        return events

    def is_lesson_event(self, event: CanonicalEvent) -> bool:
        return is_lesson_event(event, BRAND_KEYWORDS)
