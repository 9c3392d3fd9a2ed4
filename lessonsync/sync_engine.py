from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Mapping

from lessonsync.calcom_client import CalComSource
from lessonsync.config_manager import ConfigManager
from lessonsync.dedup import is_duplicate
from lessonsync.errors import SyncInProgressError
from lessonsync.google_client import GoogleCalendarSource
from lessonsync.identity import resolve_identity
from lessonsync.lesson_writer import LessonWriter, UpsertOutcome
from lessonsync.models import (
    AppConfig,
    CanonicalEvent,
    IdentityResult,
    SourceName,
    SyncResult,
    parse_iso_datetime,
    sync_window,
)
from lessonsync.sources import EventSource
from lessonsync.state_store import StateStore


logger = logging.getLogger(__name__)


def _elapsed_ms(started_at: datetime) -> int:
    return int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)


def build_source(source_name: SourceName | str, config: AppConfig) -> EventSource:
    name = SourceName(source_name)
    if name is SourceName.GOOGLE_CALENDAR:
        return GoogleCalendarSource(config.google)
    return CalComSource(config.calcom)


class SyncEngine:
    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        sources: Mapping[str, EventSource] | None = None,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self._sources = dict(sources or {})
        self._run_lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    def _source(self, source_name: str, config: AppConfig) -> EventSource:
        if source_name in self._sources:
            return self._sources[source_name]
        return build_source(source_name, config)

    def _resolve_window(
        self,
        config: AppConfig,
        window_start: datetime | None,
        window_end: datetime | None,
    ) -> tuple[datetime, datetime]:
        if (window_start is None) ^ (window_end is None):
            raise ValueError("window_start and window_end must both be provided")
        if window_start is not None and window_end is not None:
            start = parse_iso_datetime(window_start).astimezone(timezone.utc)
            end = parse_iso_datetime(window_end).astimezone(timezone.utc)
            if end <= start:
                raise ValueError("window_end must be later than window_start")
            return start, end
        return sync_window(datetime.now(timezone.utc), config.sync.window_days)

    def _record_run(self, **fields: Any) -> None:
        try:
            self.state_store.record_sync_run(**fields)
        except Exception:
            logger.exception("Could not record %s sync run", fields.get("source"))

    def ingest_event(
        self,
        event: CanonicalEvent,
        directory: Mapping[str, str],
        *,
        writer: LessonWriter | None = None,
        identity: IdentityResult | None = None,
    ) -> UpsertOutcome:
        if writer is None:
            writer = LessonWriter(self.state_store, self.config_manager.load().sync.default_location)
        if identity is None:
            identity = resolve_identity(event, directory)
        candidates = self.state_store.lessons_at(event.start_time)
        duplicate = is_duplicate(event, candidates)
        return writer.upsert(event, identity, duplicate)

    def run_sync(
        self,
        source_name: str | None = None,
        window_start: datetime | None = None,
        window_end: datetime | None = None,
        trigger: str = "manual",
    ) -> SyncResult:
        if not self._run_lock.acquire(blocking=False):
            raise SyncInProgressError("A lesson sync is already in progress.")
        try:
            return self._run_locked(source_name, window_start, window_end, trigger)
        finally:
            self._run_lock.release()

    def _run_locked(
        self,
        source_name: str | None,
        window_start: datetime | None,
        window_end: datetime | None,
        trigger: str,
    ) -> SyncResult:
        started_at = datetime.now(timezone.utc)
        config = self.config_manager.load()
        name = SourceName(source_name or config.sync.sources[0]).value
        start, end = self._resolve_window(config, window_start, window_end)
        logger.info("Starting %s sync (%s) for %s to %s", name, trigger, start.isoformat(), end.isoformat())

        try:
            source = self._source(name, config)
            events = source.fetch_events(start, end)
            lesson_events = [event for event in events if source.is_lesson_event(event)]
            directory = self.state_store.student_directory()
        except Exception as exc:
            message = f"{type(exc).__name__}: {exc}"
            logger.error("Sync of %s aborted before processing events: %s", name, message)
            self._record_run(
                source=name,
                trigger=trigger,
                status="error",
                message=message,
                duration_ms=_elapsed_ms(started_at),
            )
            raise

        logger.info("Found %d lesson events out of %d fetched from %s", len(lesson_events), len(events), name)
        writer = LessonWriter(self.state_store, config.sync.default_location)
        result = SyncResult(source=name, trigger=trigger)
        for event in lesson_events:
            try:
                outcome = self.ingest_event(event, directory, writer=writer)
            except Exception as exc:
                logger.warning("Error processing event %s: %s: %s", event.identifier, type(exc).__name__, exc)
                result.record_error(event.identifier, f"{type(exc).__name__}: {exc}")
                continue
            if outcome.error is not None:
                result.record_error(event.identifier, str(outcome.error))
            elif outcome.created:
                result.synced_count += 1
            else:
                result.skipped_count += 1

        result.duration_ms = _elapsed_ms(started_at)
        result.completed_at = datetime.now(timezone.utc)
        message = (
            f"Synced {result.synced_count}, skipped {result.skipped_count}, "
            f"errors {result.error_count} of {len(lesson_events)} lesson events."
        )
        self._record_run(
            source=name,
            trigger=trigger,
            status=result.status,
            message=message,
            duration_ms=result.duration_ms,
            synced_count=result.synced_count,
            skipped_count=result.skipped_count,
            error_count=result.error_count,
        )
        logger.info("Sync of %s complete: %s", name, message)
        return result

    def run_all(self, trigger: str = "scheduled") -> list[SyncResult]:
        results: list[SyncResult] = []
        for source_name in self.config_manager.load().sync.sources:
            try:
                results.append(self.run_sync(source_name, trigger=trigger))
            except SyncInProgressError:
                raise
            except Exception as exc:
                logger.error("Sync of %s failed: %s: %s", source_name, type(exc).__name__, exc)
        return results
