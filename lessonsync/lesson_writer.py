from __future__ import annotations

import logging
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol

from lessonsync.errors import PersistenceError
from lessonsync.models import (
    DEFAULT_LOCATION,
    CanonicalEvent,
    IdentityResult,
    LessonRecord,
    LessonStatus,
    serialize_datetime,
)


logger = logging.getLogger(__name__)

SYNC_IDENTITY_CONSTRAINT = "lessons.external_id"


class LessonSink(Protocol):
    def insert_lesson(self, lesson: LessonRecord) -> LessonRecord:
        ...


@dataclass
class UpsertOutcome:
    created: bool
    error: PersistenceError | None = None
    lesson: LessonRecord | None = None


def build_sync_metadata(
    event: CanonicalEvent,
    identity: IdentityResult,
    synced_at: datetime | None = None,
) -> dict[str, Any]:
    return {
        "source": event.source_name.value,
        "externalId": event.external_id,
        "syncedAt": serialize_datetime(synced_at or datetime.now(timezone.utc)),
        "studentNameHint": identity.display_name,
        "studentEmailHint": identity.email_hint or "",
        "rawLink": event.raw_link or "",
        "title": event.title,
    }


class LessonWriter:
    def __init__(self, store: LessonSink, default_location: str = DEFAULT_LOCATION) -> None:
        self.store = store
        self.default_location = default_location or DEFAULT_LOCATION

    def build_lesson(self, event: CanonicalEvent, identity: IdentityResult) -> LessonRecord:
        return LessonRecord(
            id=uuid.uuid4().hex,
            student_id=identity.student_id,
            lesson_date=event.start_time,
            location=(event.location or "").strip() or self.default_location,
            status=LessonStatus.SCHEDULED,
            metadata=build_sync_metadata(event, identity),
        )

    def upsert(self, event: CanonicalEvent, identity: IdentityResult, is_duplicate: bool) -> UpsertOutcome:
        if is_duplicate:
            return UpsertOutcome(created=False)
        lesson = self.build_lesson(event, identity)
        try:
            stored = self.store.insert_lesson(lesson)
        except sqlite3.IntegrityError as exc:
            if SYNC_IDENTITY_CONSTRAINT not in str(exc):
                return self._failed(event, exc)
            # Same source event already stored under another start time.
            logger.info("Lesson for %s already exists; skipping", event.identifier)
            return UpsertOutcome(created=False)
        except Exception as exc:
            return self._failed(event, exc)
        return UpsertOutcome(created=True, lesson=stored or lesson)

    @staticmethod
    def _failed(event: CanonicalEvent, exc: Exception) -> UpsertOutcome:
        logger.warning("Failed to insert lesson for %s: %s: %s", event.identifier, type(exc).__name__, exc)
        return UpsertOutcome(
            created=False,
            error=PersistenceError(f"{type(exc).__name__}: {exc}", source=event.source_name.value),
        )
