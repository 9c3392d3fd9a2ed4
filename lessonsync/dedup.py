from __future__ import annotations

import json
import logging
from typing import Any, Iterable

from lessonsync.models import CanonicalEvent, LessonRecord, SourceName


logger = logging.getLogger(__name__)

# Keys written by earlier releases, before source/externalId were standardised.
LEGACY_ID_KEYS = {
    SourceName.GOOGLE_CALENDAR.value: "google_calendar_id",
    SourceName.CAL_DOT_COM.value: "cal_booking_id",
}
LEGACY_SOURCE_ALIASES = {"cal.com": SourceName.CAL_DOT_COM.value, "calcom": SourceName.CAL_DOT_COM.value}


def _load_metadata(metadata: Any) -> dict[str, Any] | None:
    if isinstance(metadata, dict):
        return metadata
    if isinstance(metadata, (str, bytes)):
        try:
            parsed = json.loads(metadata)
        except (TypeError, ValueError):
            return None
        return parsed if isinstance(parsed, dict) else None
    return None


def metadata_identity(metadata: Any) -> tuple[str, str] | None:
    payload = _load_metadata(metadata)
    if payload is None:
        return None
    source = payload.get("source")
    external_id = payload.get("externalId")
    if isinstance(source, str) and isinstance(external_id, str) and source and external_id:
        return source, external_id

    legacy_source = source if isinstance(source, str) else payload.get("booked_via")
    legacy_source = LEGACY_SOURCE_ALIASES.get(str(legacy_source or ""), str(legacy_source or ""))
    legacy_key = LEGACY_ID_KEYS.get(legacy_source)
    if legacy_key is None:
        return None
    legacy_id = payload.get(legacy_key)
    if legacy_id in (None, ""):
        return None
    return legacy_source, str(legacy_id)


def is_duplicate(event: CanonicalEvent, candidates: Iterable[LessonRecord]) -> bool:
    target = (event.source_name.value, event.external_id)
    for candidate in candidates:
        identity = metadata_identity(candidate.metadata)
        if identity is None:
            logger.debug("Lesson %s has no usable sync metadata; treating as non-matching", candidate.id)
            continue
        if identity == target:
            return True
    return False
