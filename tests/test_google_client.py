import unittest
from datetime import datetime, timezone
from unittest import mock

from lessonsync.errors import AuthError, RateLimitError
from lessonsync.google_client import GoogleCalendarSource, google_item_to_event
from lessonsync.models import GoogleCalendarConfig, SourceName


WINDOW_START = datetime(2024, 5, 1, tzinfo=timezone.utc)
WINDOW_END = datetime(2024, 7, 30, tzinfo=timezone.utc)


def _response(status: int, payload: dict) -> mock.Mock:
    response = mock.Mock()
    response.status_code = status
    response.ok = status < 400
    response.text = ""
    response.json.return_value = payload
    return response


def _item(event_id: str, summary: str = "Tennis Lesson", **extra: object) -> dict:
    item = {
        "id": event_id,
        "summary": summary,
        "start": {"dateTime": "2024-05-02T15:00:00-07:00"},
        "end": {"dateTime": "2024-05-02T16:00:00-07:00"},
        "htmlLink": f"https://calendar.google.com/event?eid={event_id}",
        "organizer": {"email": "coach@example.com", "displayName": "Coach"},
        "attendees": [
            {"email": "coach@example.com"},
            {"email": "sam@example.com", "displayName": "Sam Student"},
        ],
    }
    item.update(extra)
    return item


class GoogleItemMappingTests(unittest.TestCase):
    def test_maps_timed_event(self) -> None:
        event = google_item_to_event(_item("abc", location="Colina Del Sol Park"))
        self.assertIsNotNone(event)
        self.assertEqual(event.external_id, "abc")
        self.assertIs(event.source_name, SourceName.GOOGLE_CALENDAR)
        self.assertEqual(event.start_time, datetime(2024, 5, 2, 22, 0, tzinfo=timezone.utc))
        self.assertEqual(event.attendee_emails, ["coach@example.com", "sam@example.com"])
        self.assertEqual(event.organizer_email, "coach@example.com")
        self.assertEqual(event.attendees[1].display_name, "Sam Student")
        self.assertEqual(event.location, "Colina Del Sol Park")
        self.assertTrue(event.raw_link.endswith("eid=abc"))

    def test_all_day_event_maps_to_midnight_utc(self) -> None:
        event = google_item_to_event({"id": "day", "summary": "", "start": {"date": "2024-05-03"}})
        self.assertEqual(event.start_time, datetime(2024, 5, 3, tzinfo=timezone.utc))
        self.assertEqual(event.title, "Untitled Event")
        self.assertIsNone(event.end_time)

    def test_item_without_id_or_start_is_dropped(self) -> None:
        self.assertIsNone(google_item_to_event({"summary": "x", "start": {"date": "2024-05-03"}}))
        self.assertIsNone(google_item_to_event({"id": "x", "summary": "x"}))


class GoogleCalendarSourceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.source = GoogleCalendarSource(GoogleCalendarConfig.from_dict({"access_token": "tok", "page_size": 2}))

    def test_missing_token_raises_auth_error_without_request(self) -> None:
        source = GoogleCalendarSource(GoogleCalendarConfig())
        with mock.patch("lessonsync.sources.requests.get") as get:
            with self.assertRaises(AuthError):
                source.fetch_events(WINDOW_START, WINDOW_END)
        get.assert_not_called()

    def test_follows_page_tokens_and_skips_cancelled(self) -> None:
        pages = [
            _response(200, {"items": [_item("a"), _item("b", status="cancelled")], "nextPageToken": "p2"}),
            _response(200, {"items": [_item("c")]}),
        ]
        with mock.patch("lessonsync.sources.requests.get", side_effect=pages) as get:
            events = self.source.fetch_events(WINDOW_START, WINDOW_END)

        self.assertEqual([event.external_id for event in events], ["a", "c"])
        self.assertEqual(get.call_count, 2)
        first_call = get.call_args_list[0]
        self.assertTrue(first_call.args[0].endswith("/calendars/primary/events"))
        self.assertEqual(first_call.kwargs["headers"]["Authorization"], "Bearer tok")
        self.assertEqual(first_call.kwargs["params"]["singleEvents"], "true")
        self.assertEqual(first_call.kwargs["params"]["maxResults"], 2)
        self.assertNotIn("pageToken", first_call.kwargs["params"])
        self.assertEqual(get.call_args_list[1].kwargs["params"]["pageToken"], "p2")

    def test_expired_token_raises_auth_error(self) -> None:
        response = _response(401, {"error": {"code": 401, "message": "Invalid Credentials"}})
        with mock.patch("lessonsync.sources.requests.get", return_value=response):
            with self.assertRaises(AuthError):
                self.source.fetch_events(WINDOW_START, WINDOW_END)

    def test_rate_limit_is_propagated(self) -> None:
        response = _response(
            403,
            {"error": {"code": 403, "message": "Rate Limit Exceeded", "errors": [{"reason": "rateLimitExceeded"}]}},
        )
        with mock.patch("lessonsync.sources.requests.get", return_value=response) as get:
            with self.assertRaises(RateLimitError):
                self.source.fetch_events(WINDOW_START, WINDOW_END)
        self.assertEqual(get.call_count, 1)

    def test_is_lesson_event_uses_classifier(self) -> None:
        lesson = google_item_to_event(_item("a", summary="Tennis Session w/ Sam"))
        other = google_item_to_event(_item("b", summary="Dentist Appointment"))
        self.assertTrue(self.source.is_lesson_event(lesson))
        self.assertFalse(self.source.is_lesson_event(other))

    def test_events_starting_outside_window_are_dropped(self) -> None:
        underway = _item(
            "underway",
            start={"dateTime": "2024-04-30T23:00:00Z"},
            end={"dateTime": "2024-05-01T01:00:00Z"},
        )
        at_end = _item("at-end", start={"dateTime": "2024-07-30T00:00:00Z"})
        payload = {"items": [underway, _item("inside"), at_end]}
        with mock.patch("lessonsync.sources.requests.get", return_value=_response(200, payload)):
            events = self.source.fetch_events(WINDOW_START, WINDOW_END)
        self.assertEqual([event.external_id for event in events], ["inside"])


if __name__ == "__main__":
    unittest.main()
