from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import Any


DEFAULT_LOCATION = "Colina Del Sol Park"
DEFAULT_SOURCES = ["google_calendar"]


class SourceName(str, Enum):
    GOOGLE_CALENDAR = "google_calendar"
    CAL_DOT_COM = "cal_dot_com"


class LessonStatus(str, Enum):
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_iso_datetime(value: str | datetime | date | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def to_utc_key(value: datetime) -> str:
    """Canonical UTC text used for exact lesson_date comparisons."""
    return _ensure_tz(value).astimezone(timezone.utc).isoformat(timespec="seconds")


def sync_window(now: datetime, window_days: int) -> tuple[datetime, datetime]:
    start = _ensure_tz(now)
    return start, start + timedelta(days=max(1, int(window_days)))


def _clean_sources(values: Any) -> list[str]:
    known = {item.value for item in SourceName}
    if not isinstance(values, (list, tuple)):
        return list(DEFAULT_SOURCES)
    cleaned: list[str] = []
    for value in values:
        name = str(value).strip().lower()
        if name in known and name not in cleaned:
            cleaned.append(name)
    return cleaned or list(DEFAULT_SOURCES)


@dataclass
class GoogleCalendarConfig:
    access_token: str = ""
    calendar_id: str = "primary"
    base_url: str = "https://www.googleapis.com/calendar/v3"
    timeout_seconds: int = 30
    page_size: int = 250

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "GoogleCalendarConfig":
        data = data or {}
        return cls(
            access_token=str(data.get("access_token", "")).strip(),
            calendar_id=str(data.get("calendar_id", "primary")).strip() or "primary",
            base_url=str(data.get("base_url", "https://www.googleapis.com/calendar/v3")).strip().rstrip("/")
            or "https://www.googleapis.com/calendar/v3",
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
            page_size=min(2500, max(1, int(data.get("page_size", 250)))),
        )


@dataclass
class CalComConfig:
    api_key: str = ""
    base_url: str = "https://api.cal.com/v2"
    api_version: str = "2024-08-13"
    webhook_secret: str = ""
    timeout_seconds: int = 30
    page_size: int = 100

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalComConfig":
        data = data or {}
        return cls(
            api_key=str(data.get("api_key", "")).strip(),
            base_url=str(data.get("base_url", "https://api.cal.com/v2")).strip().rstrip("/")
            or "https://api.cal.com/v2",
            api_version=str(data.get("api_version", "2024-08-13")).strip() or "2024-08-13",
            webhook_secret=str(data.get("webhook_secret", "")).strip(),
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
            page_size=min(250, max(1, int(data.get("page_size", 100)))),
        )


@dataclass
class SyncConfig:
    window_days: int = 90
    auto_sync_interval_seconds: int = 3600
    default_location: str = DEFAULT_LOCATION
    sources: list[str] = field(default_factory=lambda: list(DEFAULT_SOURCES))

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            window_days=max(1, int(data.get("window_days", 90))),
            auto_sync_interval_seconds=max(60, int(data.get("auto_sync_interval_seconds", 3600))),
            default_location=str(data.get("default_location", DEFAULT_LOCATION)).strip() or DEFAULT_LOCATION,
            sources=_clean_sources(data.get("sources", DEFAULT_SOURCES)),
        )


@dataclass
class AppConfig:
    google: GoogleCalendarConfig = field(default_factory=GoogleCalendarConfig)
    calcom: CalComConfig = field(default_factory=CalComConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            google=GoogleCalendarConfig.from_dict(data.get("google")),
            calcom=CalComConfig.from_dict(data.get("calcom")),
            sync=SyncConfig.from_dict(data.get("sync")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Attendee:
    email: str = ""
    display_name: str = ""

    @property
    def label(self) -> str:
        return self.display_name or self.email


@dataclass
class CanonicalEvent:
    external_id: str
    title: str
    start_time: datetime
    source_name: SourceName
    end_time: datetime | None = None
    location: str | None = None
    attendees: list[Attendee] = field(default_factory=list)
    organizer: Attendee | None = None
    raw_link: str | None = None
    description: str = ""

    def __post_init__(self) -> None:
        self.external_id = str(self.external_id or "").strip()
        if not self.external_id:
            raise ValueError("CanonicalEvent requires a non-empty external_id")
        self.source_name = SourceName(self.source_name)
        self.start_time = _ensure_tz(self.start_time)
        if self.end_time is not None:
            self.end_time = _ensure_tz(self.end_time)

    @property
    def attendee_emails(self) -> list[str]:
        return [attendee.email for attendee in self.attendees if attendee.email]

    @property
    def organizer_email(self) -> str | None:
        if self.organizer is None or not self.organizer.email:
            return None
        return self.organizer.email

    @property
    def identifier(self) -> str:
        return f"{self.source_name.value}:{self.external_id}"


@dataclass
class IdentityResult:
    student_id: str | None
    display_name: str
    email_hint: str | None = None


@dataclass
class LessonRecord:
    id: str
    student_id: str | None
    lesson_date: datetime
    location: str
    status: LessonStatus = LessonStatus.SCHEDULED
    metadata: dict[str, Any] | str = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "student_id": self.student_id,
            "lesson_date": serialize_datetime(self.lesson_date),
            "location": self.location,
            "status": LessonStatus(self.status).value,
            "metadata": self.metadata,
        }


@dataclass
class SyncError:
    event_identifier: str
    message: str


@dataclass
class SyncResult:
    source: str
    trigger: str
    synced_count: int = 0
    skipped_count: int = 0
    error_count: int = 0
    errors: list[SyncError] = field(default_factory=list)
    duration_ms: int = 0
    completed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def status(self) -> str:
        return "partial" if self.error_count else "success"

    def record_error(self, event_identifier: str, message: str) -> None:
        self.error_count += 1
        self.errors.append(SyncError(event_identifier=event_identifier, message=message))

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "trigger": self.trigger,
            "status": self.status,
            "synced_count": self.synced_count,
            "skipped_count": self.skipped_count,
            "error_count": self.error_count,
            "errors": [asdict(error) for error in self.errors],
            "duration_ms": self.duration_ms,
            "completed_at": serialize_datetime(self.completed_at),
        }


def default_app_config() -> AppConfig:
    return AppConfig()
