import sqlite3
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from lessonsync.models import LessonRecord, parse_iso_datetime
from lessonsync.state_store import StateStore


def _lesson(lesson_id: str, when: datetime, external_id: str | None = "g1") -> LessonRecord:
    metadata = {"source": "google_calendar", "externalId": external_id} if external_id else {"note": "manual"}
    return LessonRecord(id=lesson_id, student_id=None, lesson_date=when, location="Court", metadata=metadata)


class StateStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = StateStore(str(Path(self.temp_dir.name) / "state.db"))

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_lessons_at_matches_exact_instant_across_offsets(self) -> None:
        when = parse_iso_datetime("2024-05-01T08:00:00-07:00")
        self.store.insert_lesson(_lesson("l1", when))
        self.store.insert_lesson(_lesson("l2", when + timedelta(minutes=30), "g2"))

        found = self.store.lessons_at(parse_iso_datetime("2024-05-01T15:00:00Z"))
        self.assertEqual([lesson.id for lesson in found], ["l1"])
        self.assertEqual(found[0].metadata["externalId"], "g1")
        self.assertEqual(found[0].lesson_date, datetime(2024, 5, 1, 15, 0, tzinfo=timezone.utc))

    def test_unique_sync_identity_rejects_second_insert(self) -> None:
        when = datetime(2024, 5, 1, 15, 0, tzinfo=timezone.utc)
        self.store.insert_lesson(_lesson("l1", when))
        with self.assertRaises(sqlite3.IntegrityError):
            self.store.insert_lesson(_lesson("l2", when))
        self.store.insert_lesson(_lesson("l3", when, external_id=None))
        self.store.insert_lesson(_lesson("l4", when, external_id=None))
        self.assertEqual(len(self.store.lessons_at(when)), 3)

    def test_cancel_synced_lesson(self) -> None:
        when = datetime(2024, 5, 1, 15, 0, tzinfo=timezone.utc)
        self.store.insert_lesson(_lesson("l1", when))

        self.assertEqual(self.store.cancel_synced_lesson("google_calendar", "g1"), "l1")
        self.assertEqual(self.store.lessons_at(when)[0].status.value, "cancelled")
        self.assertIsNone(self.store.cancel_synced_lesson("google_calendar", "g1"))
        self.assertIsNone(self.store.cancel_synced_lesson("cal_dot_com", "g1"))

    def test_student_directory_and_credits(self) -> None:
        sid = self.store.add_student(email="Sam@Example.com", full_name="Sam", lesson_credits=1)
        self.assertEqual(self.store.student_directory(), {"sam@example.com": sid})
        self.assertEqual(self.store.deduct_lesson_credit(sid), 0)
        self.assertIsNone(self.store.deduct_lesson_credit(sid))
        self.assertEqual(self.store.get_student(sid)["lesson_credits"], 0)
        self.assertIsNone(self.store.deduct_lesson_credit("missing"))

    def test_sync_runs_notifications_and_meta(self) -> None:
        self.store.record_sync_run(
            source="google_calendar",
            trigger="manual",
            status="partial",
            message="Synced 1",
            duration_ms=12,
            synced_count=1,
            error_count=1,
        )
        runs = self.store.recent_sync_runs()
        self.assertEqual(runs[0]["status"], "partial")
        self.assertEqual(runs[0]["error_count"], 1)

        self.store.add_notification(user_id="s1", type="lesson_booked", title="Lesson Booked!", body="soon")
        self.assertEqual(self.store.list_notifications("s1")[0]["type"], "lesson_booked")

        self.assertIsNone(self.store.get_meta("last_sync_at"))
        self.store.set_meta("last_sync_at", "a")
        self.store.set_meta("last_sync_at", "b")
        self.assertEqual(self.store.get_meta("last_sync_at"), "b")


if __name__ == "__main__":
    unittest.main()
