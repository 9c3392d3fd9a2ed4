from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Optional

from lessonsync.config_manager import ConfigManager
from lessonsync.errors import SyncInProgressError
from lessonsync.models import SyncResult, parse_iso_datetime, serialize_datetime
from lessonsync.state_store import StateStore
from lessonsync.sync_engine import SyncEngine


logger = logging.getLogger(__name__)

LAST_SYNC_META_KEY = "last_sync_at"


def should_auto_sync(last_sync_at: datetime | None, now: datetime, interval: timedelta) -> bool:
    if last_sync_at is None:
        return True
    return now - last_sync_at >= interval


class SyncScheduler:
    def __init__(self, sync_engine: SyncEngine, config_manager: ConfigManager, state_store: StateStore) -> None:
        self.sync_engine = sync_engine
        self.config_manager = config_manager
        self.state_store = state_store
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._manual_trigger_event = threading.Event()
        self._last_attempt_at: datetime | None = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="lessonsync-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._manual_trigger_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def trigger_manual(self) -> None:
        self._manual_trigger_event.set()

    def last_sync_at(self) -> datetime | None:
        raw = self.state_store.get_meta(LAST_SYNC_META_KEY)
        if not raw:
            return None
        try:
            return parse_iso_datetime(raw)
        except ValueError:
            logger.warning("Ignoring unparsable %s value: %r", LAST_SYNC_META_KEY, raw)
            return None

    def _interval(self) -> timedelta:
        return timedelta(seconds=self.config_manager.load().sync.auto_sync_interval_seconds)

    def seconds_until_due(self, now: datetime | None = None) -> float:
        now = now or datetime.now(timezone.utc)
        candidates = [value for value in (self.last_sync_at(), self._last_attempt_at) if value is not None]
        if not candidates:
            return 0.0
        last = max(candidates)
        return max(0.0, (last + self._interval() - now).total_seconds())

    def run_pending(self, *, manual: bool = False, now: datetime | None = None) -> list[SyncResult]:
        now = now or datetime.now(timezone.utc)
        if not manual and not should_auto_sync(self.last_sync_at(), now, self._interval()):
            return []
        self._last_attempt_at = now
        try:
            results = self.sync_engine.run_all(trigger="manual" if manual else "scheduled")
        except SyncInProgressError:
            logger.info("Skipping %s sync; another sync is in progress", "manual" if manual else "scheduled")
            return []
        if results:
            completed_at = max(result.completed_at for result in results)
            self.state_store.set_meta(LAST_SYNC_META_KEY, serialize_datetime(completed_at) or "")
        return results

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            timeout = max(1.0, self.seconds_until_due())
            manual = self._manual_trigger_event.wait(timeout=timeout)
            self._manual_trigger_event.clear()
            if self._stop_event.is_set():
                break
            try:
                self.run_pending(manual=manual)
            except Exception:
                logger.exception("Scheduled sync failed")
