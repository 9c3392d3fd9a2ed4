from __future__ import annotations


class LessonSyncError(Exception):
    user_message = "Lesson sync failed."

    def __init__(self, message: str = "", *, source: str = "") -> None:
        super().__init__(message or self.user_message)
        self.source = source


class AuthError(LessonSyncError):
    user_message = "Calendar credentials are missing or expired. Please re-authenticate and try again."


class RateLimitError(LessonSyncError):
    user_message = "The calendar provider is rate limiting requests. Please try again in a few minutes."


class TransientIOError(LessonSyncError):
    user_message = "Could not reach the calendar provider. Please try again."


class PersistenceError(LessonSyncError):
    user_message = "Failed to save the lesson."


class SyncInProgressError(LessonSyncError):
    user_message = "A sync is already running."


class WebhookSignatureError(LessonSyncError):
    user_message = "Webhook signature verification failed."
