import unittest
from datetime import datetime, timedelta, timezone

from lessonsync.models import (
    AppConfig,
    CanonicalEvent,
    SourceName,
    SyncConfig,
    SyncResult,
    parse_iso_datetime,
    sync_window,
    to_utc_key,
)


class ModelsTests(unittest.TestCase):
    def test_sync_config_defaults_and_bounds(self) -> None:
        cfg = SyncConfig.from_dict({})
        self.assertEqual(cfg.window_days, 90)
        self.assertEqual(cfg.auto_sync_interval_seconds, 3600)
        self.assertEqual(cfg.default_location, "Colina Del Sol Park")
        self.assertEqual(cfg.sources, ["google_calendar"])

        clamped = SyncConfig.from_dict(
            {"window_days": 0, "auto_sync_interval_seconds": 5, "sources": ["CAL_DOT_COM", "bogus", "cal_dot_com"]}
        )
        self.assertEqual(clamped.window_days, 1)
        self.assertEqual(clamped.auto_sync_interval_seconds, 60)
        self.assertEqual(clamped.sources, ["cal_dot_com"])

    def test_app_config_round_trips_through_dict(self) -> None:
        cfg = AppConfig.from_dict(
            {
                "google": {"access_token": " tok ", "calendar_id": ""},
                "calcom": {"api_key": "key", "base_url": "https://cal.example.com/v2/"},
            }
        )
        self.assertEqual(cfg.google.access_token, "tok")
        self.assertEqual(cfg.google.calendar_id, "primary")
        self.assertEqual(cfg.calcom.base_url, "https://cal.example.com/v2")
        self.assertEqual(AppConfig.from_dict(cfg.to_dict()), cfg)

    def test_canonical_event_requires_external_id(self) -> None:
        with self.assertRaises(ValueError):
            CanonicalEvent(
                external_id="  ",
                title="Lesson",
                start_time=datetime(2024, 5, 1, 15, 0, tzinfo=timezone.utc),
                source_name=SourceName.GOOGLE_CALENDAR,
            )

    def test_canonical_event_normalizes_naive_start_to_utc(self) -> None:
        event = CanonicalEvent(
            external_id="evt-1",
            title="Lesson",
            start_time=datetime(2024, 5, 1, 15, 0),
            source_name="cal_dot_com",
        )
        self.assertEqual(event.start_time.tzinfo, timezone.utc)
        self.assertIs(event.source_name, SourceName.CAL_DOT_COM)
        self.assertEqual(event.identifier, "cal_dot_com:evt-1")

    def test_to_utc_key_matches_equal_instants_across_offsets(self) -> None:
        utc = parse_iso_datetime("2024-05-01T15:00:00Z")
        pacific = parse_iso_datetime("2024-05-01T08:00:00-07:00")
        self.assertEqual(to_utc_key(utc), to_utc_key(pacific))

    def test_sync_window_is_now_plus_days(self) -> None:
        now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        start, end = sync_window(now, 90)
        self.assertEqual(start, now)
        self.assertEqual(end - start, timedelta(days=90))

    def test_sync_result_status_and_errors(self) -> None:
        result = SyncResult(source="google_calendar", trigger="manual", synced_count=2)
        self.assertEqual(result.status, "success")
        result.record_error("google_calendar:x", "boom")
        payload = result.to_dict()
        self.assertEqual(payload["status"], "partial")
        self.assertEqual(payload["error_count"], 1)
        self.assertEqual(payload["errors"], [{"event_identifier": "google_calendar:x", "message": "boom"}])


if __name__ == "__main__":
    unittest.main()
