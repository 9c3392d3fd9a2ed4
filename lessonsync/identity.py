from __future__ import annotations

from typing import Any, Iterable, Mapping

from lessonsync.models import Attendee, CanonicalEvent, IdentityResult


UNKNOWN_DISPLAY_NAME = "Unknown"


def normalize_email(value: Any) -> str:
    return str(value or "").strip().lower()


def build_directory(students: Iterable[Mapping[str, Any]]) -> dict[str, str]:
    directory: dict[str, str] = {}
    for student in students:
        email = normalize_email(student.get("email"))
        student_id = str(student.get("id", "") or "").strip()
        if not email or not student_id or email in directory:
            continue
        directory[email] = student_id
    return directory


def _resolve_student_id(event: CanonicalEvent, directory: Mapping[str, str]) -> str | None:
    organizer_email = normalize_email(event.organizer_email)
    for attendee in event.attendees:
        email = normalize_email(attendee.email)
        if not email or email == organizer_email:
            continue
        if email in directory:
            return directory[email]
    if organizer_email and organizer_email in directory:
        return directory[organizer_email]
    return None


def _display_party(event: CanonicalEvent) -> Attendee | None:
    organizer_email = normalize_email(event.organizer_email)
    for attendee in event.attendees:
        if organizer_email and normalize_email(attendee.email) == organizer_email:
            continue
        if attendee.label:
            return attendee
    if event.organizer is not None and event.organizer.label:
        return event.organizer
    return None


def resolve_identity(event: CanonicalEvent, directory: Mapping[str, str]) -> IdentityResult:
    party = _display_party(event)
    if party is not None:
        display_name = party.label
        email_hint = party.email or event.organizer_email
    else:
        display_name = str(event.title or "").strip() or UNKNOWN_DISPLAY_NAME
        email_hint = event.organizer_email
    return IdentityResult(
        student_id=_resolve_student_id(event, directory),
        display_name=display_name,
        email_hint=email_hint or None,
    )
