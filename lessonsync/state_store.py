from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from lessonsync.dedup import metadata_identity
from lessonsync.identity import build_directory
from lessonsync.models import LessonRecord, LessonStatus, parse_iso_datetime, to_utc_key


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _decode_metadata(raw: Any) -> dict[str, Any] | str:
    if raw is None:
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return str(raw)
    return parsed if isinstance(parsed, dict) else str(raw)


def _encode_metadata(metadata: dict[str, Any] | str) -> str:
    if isinstance(metadata, str):
        return metadata
    return json.dumps(metadata, ensure_ascii=False, sort_keys=True)


class StateStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS students (
            id TEXT PRIMARY KEY,
            email TEXT,
            full_name TEXT NOT NULL DEFAULT '',
            lesson_credits INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS lessons (
            id TEXT PRIMARY KEY,
            student_id TEXT REFERENCES students(id),
            lesson_date TEXT NOT NULL,
            location TEXT NOT NULL,
            status TEXT NOT NULL,
            metadata_json TEXT,
            sync_source TEXT,
            external_id TEXT,
            created_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_lessons_lesson_date ON lessons(lesson_date);

        CREATE UNIQUE INDEX IF NOT EXISTS idx_lessons_sync_identity
            ON lessons(sync_source, external_id)
            WHERE external_id IS NOT NULL;

        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_at TEXT NOT NULL,
            source TEXT NOT NULL,
            trigger TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL,
            synced_count INTEGER NOT NULL,
            skipped_count INTEGER NOT NULL,
            error_count INTEGER NOT NULL
        );

        CREATE TABLE IF NOT EXISTS notifications (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            type TEXT NOT NULL,
            title TEXT NOT NULL,
            body TEXT NOT NULL,
            link TEXT,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS app_meta (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    def add_student(
        self,
        *,
        email: str,
        full_name: str = "",
        lesson_credits: int = 0,
        student_id: str | None = None,
    ) -> str:
        new_id = student_id or uuid.uuid4().hex
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO students(id, email, full_name, lesson_credits, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (new_id, str(email or "").strip(), str(full_name or ""), max(0, int(lesson_credits)), _utc_now()),
                )
                conn.commit()
        return new_id

    def get_student(self, student_id: str) -> dict[str, Any] | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT id, email, full_name, lesson_credits, created_at
                    FROM students
                    WHERE id = ?
                    """,
                    (str(student_id),),
                ).fetchone()
        return dict(row) if row else None

    def list_students(self) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, email, full_name, lesson_credits, created_at
                    FROM students
                    ORDER BY created_at, id
                    """
                ).fetchall()
        return [dict(row) for row in rows]

    def student_directory(self) -> dict[str, str]:
        return build_directory(self.list_students())

    def deduct_lesson_credit(self, student_id: str) -> int | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT lesson_credits FROM students WHERE id = ?",
                    (str(student_id),),
                ).fetchone()
                if row is None:
                    return None
                credits = int(row["lesson_credits"])
                if credits <= 0:
                    return None
                conn.execute(
                    "UPDATE students SET lesson_credits = ? WHERE id = ?",
                    (credits - 1, str(student_id)),
                )
                conn.commit()
        return credits - 1

    def lessons_at(self, lesson_date: datetime) -> list[LessonRecord]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, student_id, lesson_date, location, status, metadata_json
                    FROM lessons
                    WHERE lesson_date = ?
                    ORDER BY created_at, id
                    """,
                    (to_utc_key(lesson_date),),
                ).fetchall()
        return [self._row_to_lesson(row) for row in rows]

    def insert_lesson(self, lesson: LessonRecord) -> LessonRecord:
        identity = metadata_identity(lesson.metadata)
        sync_source, external_id = identity if identity else (None, None)
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO lessons(
                        id, student_id, lesson_date, location, status,
                        metadata_json, sync_source, external_id, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        lesson.id,
                        lesson.student_id,
                        to_utc_key(lesson.lesson_date),
                        lesson.location,
                        LessonStatus(lesson.status).value,
                        _encode_metadata(lesson.metadata),
                        sync_source,
                        external_id,
                        _utc_now(),
                    ),
                )
                conn.commit()
        return lesson

    def cancel_synced_lesson(self, sync_source: str, external_id: str) -> str | None:
        cancelled = LessonStatus.CANCELLED.value
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT id
                    FROM lessons
                    WHERE sync_source = ? AND external_id = ? AND status != ?
                    """,
                    (str(sync_source), str(external_id), cancelled),
                ).fetchone()
                if row is None:
                    return None
                conn.execute("UPDATE lessons SET status = ? WHERE id = ?", (cancelled, row["id"]))
                conn.commit()
        return str(row["id"])

    def list_lessons(self, *, student_id: str | None = None, limit: int = 200) -> list[LessonRecord]:
        with self._lock:
            with self._connect() as conn:
                if student_id is None:
                    rows = conn.execute(
                        """
                        SELECT id, student_id, lesson_date, location, status, metadata_json
                        FROM lessons
                        ORDER BY lesson_date, id
                        LIMIT ?
                        """,
                        (max(1, limit),),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        """
                        SELECT id, student_id, lesson_date, location, status, metadata_json
                        FROM lessons
                        WHERE student_id = ?
                        ORDER BY lesson_date, id
                        LIMIT ?
                        """,
                        (str(student_id), max(1, limit)),
                    ).fetchall()
        return [self._row_to_lesson(row) for row in rows]

    @staticmethod
    def _row_to_lesson(row: sqlite3.Row) -> LessonRecord:
        return LessonRecord(
            id=str(row["id"]),
            student_id=row["student_id"],
            lesson_date=parse_iso_datetime(row["lesson_date"]),
            location=str(row["location"] or ""),
            status=LessonStatus(row["status"]),
            metadata=_decode_metadata(row["metadata_json"]),
        )

    def record_sync_run(
        self,
        *,
        source: str,
        trigger: str,
        status: str,
        message: str,
        duration_ms: int,
        synced_count: int = 0,
        skipped_count: int = 0,
        error_count: int = 0,
    ) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_runs(
                        run_at, source, trigger, status, message, duration_ms,
                        synced_count, skipped_count, error_count
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        _utc_now(),
                        source,
                        trigger,
                        status,
                        message,
                        int(duration_ms),
                        int(synced_count),
                        int(skipped_count),
                        int(error_count),
                    ),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def recent_sync_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, run_at, source, trigger, status, message, duration_ms,
                           synced_count, skipped_count, error_count
                    FROM sync_runs
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (max(1, limit),),
                ).fetchall()
        return [dict(row) for row in rows]

    def add_notification(self, *, user_id: str, type: str, title: str, body: str, link: str = "") -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO notifications(user_id, type, title, body, link, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (str(user_id), type, title, body, link, _utc_now()),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def list_notifications(self, user_id: str, limit: int = 50) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, user_id, type, title, body, link, created_at
                    FROM notifications
                    WHERE user_id = ?
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (str(user_id), max(1, limit)),
                ).fetchall()
        return [dict(row) for row in rows]

    def set_meta(self, key: str, value: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_meta(key, value, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (str(key), str(value), _utc_now()),
                )
                conn.commit()

    def get_meta(self, key: str) -> str | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT value
                    FROM app_meta
                    WHERE key = ?
                    """,
                    (str(key),),
                ).fetchone()
        if row is None:
            return None
        return str(row["value"])
