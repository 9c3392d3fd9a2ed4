from __future__ import annotations

import hashlib
import hmac
import json
import logging
from typing import Any

from lessonsync.calcom_client import booking_to_event
from lessonsync.errors import WebhookSignatureError
from lessonsync.identity import resolve_identity
from lessonsync.models import CanonicalEvent, IdentityResult, SourceName
from lessonsync.state_store import StateStore
from lessonsync.sync_engine import SyncEngine


logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-cal-signature-256"
INGESTED_TRIGGERS = {"BOOKING_CREATED", "BOOKING_RESCHEDULED"}


def compute_signature(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: str | None, secret: str) -> bool:
    if not secret:
        return True
    if not signature:
        return False
    return hmac.compare_digest(compute_signature(body, secret), signature.strip().lower())


def _unwrap(payload: Any) -> tuple[str, dict[str, Any]]:
    if not isinstance(payload, dict):
        raise ValueError("webhook body must be a JSON object")
    trigger = str(payload.get("triggerEvent", "") or "").strip().upper()
    booking = payload.get("payload") if isinstance(payload.get("payload"), dict) else payload
    return trigger, booking


def _hinted_student_id(booking: dict[str, Any]) -> str | None:
    metadata = booking.get("metadata")
    if not isinstance(metadata, dict):
        return None
    value = metadata.get("studentId") or metadata.get("student_id")
    text = str(value or "").strip()
    return text or None


def _booking_identity(event: CanonicalEvent, booking: dict[str, Any], directory: dict[str, str]) -> IdentityResult:
    identity = resolve_identity(event, directory)
    hinted = _hinted_student_id(booking)
    if hinted and hinted in set(directory.values()):
        identity.student_id = hinted
    return identity


def _previous_booking_uid(booking: dict[str, Any]) -> str | None:
    for key in ("rescheduleUid", "fromReschedule"):
        value = booking.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _notify(store: StateStore, student_id: str, event: CanonicalEvent, *, rescheduled: bool = False) -> None:
    when = event.start_time.strftime("%A, %B %d, %Y at %I:%M %p %Z").strip()
    if rescheduled:
        kind, title, body = "lesson_rescheduled", "Lesson Rescheduled", f"Your lesson has moved to {when}"
    else:
        kind, title, body = "lesson_booked", "Lesson Booked!", f"Your lesson is scheduled for {when}"
    try:
        store.add_notification(user_id=student_id, type=kind, title=title, body=body, link="/dashboard")
    except Exception as exc:
        logger.error("Error creating %s notification for %s: %s", kind, student_id, exc)


def _deduct_credit(store: StateStore, student_id: str) -> int | None:
    try:
        remaining = store.deduct_lesson_credit(student_id)
    except Exception as exc:
        logger.error("Error deducting lesson credit for %s: %s", student_id, exc)
        return None
    if remaining is None:
        logger.warning("Student %s has no credits or was not found; lesson created without deduction", student_id)
    return remaining


def _cancel_previous(store: StateStore, previous_uid: str) -> str | None:
    try:
        cancelled = store.cancel_synced_lesson(SourceName.CAL_DOT_COM.value, previous_uid)
    except Exception as exc:
        logger.error("Error cancelling lesson for rescheduled booking %s: %s", previous_uid, exc)
        return None
    if cancelled is None:
        logger.warning("No active lesson found for rescheduled booking %s", previous_uid)
    return cancelled


def handle_booking_webhook(
    engine: SyncEngine,
    store: StateStore,
    body: bytes,
    signature: str | None,
    secret: str,
) -> dict[str, Any]:
    if not verify_signature(body, signature, secret):
        raise WebhookSignatureError("Cal.com webhook signature mismatch.", source="cal_dot_com")
    try:
        payload = json.loads(body or b"{}")
    except ValueError as exc:
        raise ValueError(f"webhook body is not valid JSON: {exc}") from exc

    trigger, booking = _unwrap(payload)
    if trigger and trigger not in INGESTED_TRIGGERS:
        logger.info("Ignoring Cal.com webhook trigger %s", trigger)
        return {"status": "ignored", "trigger": trigger, "lesson_id": None}

    event = booking_to_event(booking)
    directory = store.student_directory()
    identity = _booking_identity(event, booking, directory)
    outcome = engine.ingest_event(event, directory, identity=identity)
    if outcome.error is not None:
        raise outcome.error
    if not outcome.created or outcome.lesson is None:
        logger.info("Cal.com booking %s already synced", event.external_id)
        return {"status": "duplicate", "trigger": trigger, "lesson_id": None}

    logger.info("Created lesson %s from Cal.com booking %s", outcome.lesson.id, event.external_id)
    response: dict[str, Any] = {
        "status": "created",
        "trigger": trigger,
        "lesson_id": outcome.lesson.id,
        "student_id": identity.student_id,
        "remaining_credits": None,
    }
    previous_uid = _previous_booking_uid(booking)
    if trigger == "BOOKING_RESCHEDULED" or previous_uid is not None:
        # A reschedule moves an already-paid lesson; no second credit.
        response["replaced_lesson_id"] = _cancel_previous(store, previous_uid) if previous_uid else None
        if identity.student_id:
            _notify(store, identity.student_id, event, rescheduled=True)
        return response

    if identity.student_id:
        response["remaining_credits"] = _deduct_credit(store, identity.student_id)
        _notify(store, identity.student_id, event)
    return response
