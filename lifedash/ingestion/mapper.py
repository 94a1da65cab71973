"""Map a provider activity payload onto ``CanonicalActivity``.

The mapping is table-driven: ``FIELD_PATHS`` lists, for every canonical
field, the dotted paths tried in order against the provider record.  Both
the flat shape used by simple integrations (``sport``, ``distance_metres``)
and Terra's nested activity schema (``distance_data.summary.distance_meters``)
are covered.  The first present, non-null value wins.

Defaulting policy:
    start_time       payload -> queue hint -> processing time (never unset)
    distance_km      metres / 1000 rounded to 2 dp; absent stays absent
    calories         total calories preferred over active calories
    pace_min_per_km  only with a duration and a non-zero distance
    activity_type    vocabulary lookup with ``outro`` fallback
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any

from lifedash.ingestion.base import CanonicalActivity, utc_now
from lifedash.ingestion.errors import NoDataError
from lifedash.ingestion.vocabulary import ActivityVocabulary, get_activity_vocabulary

logger = logging.getLogger("lifedash.ingestion.mapper")

FIELD_PATHS: dict[str, tuple[str, ...]] = {
    "activity_type": (
        "sport",
        "activity_type",
        "activityType",
        "metadata.sport",
        "metadata.activity_type",
        "metadata.name",
    ),
    "external_id": (
        "metadata.summary_id",
        "summary_id",
        "activity_id",
        "activityId",
        "metadata.upload_id",
    ),
    "start_time": ("start_time", "startTime", "metadata.start_time"),
    "end_time": ("end_time", "endTime", "metadata.end_time"),
    "duration_seconds": (
        "duration_seconds",
        "durationInSeconds",
        "active_durations_data.activity_seconds",
    ),
    "distance_metres": (
        "distance_metres",
        "distance_meters",
        "distanceInMeters",
        "distance_data.summary.distance_meters",
    ),
    "total_calories": (
        "total_calories",
        "calories_burned",
        "calories_data.total_burned_calories",
    ),
    "active_calories": (
        "active_calories",
        "activeKilocalories",
        "calories_data.net_activity_calories",
    ),
    "steps": ("steps", "distance_data.summary.steps"),
    "avg_heart_rate": (
        "avg_heart_rate",
        "avg_hr",
        "averageHeartRateInBeatsPerMinute",
        "heart_rate_data.summary.avg_hr_bpm",
    ),
    "max_heart_rate": (
        "max_heart_rate",
        "max_hr",
        "maxHeartRateInBeatsPerMinute",
        "heart_rate_data.summary.max_hr_bpm",
    ),
    "elevation_gain_m": (
        "elevation_gain_m",
        "elevationGainInMeters",
        "distance_data.summary.elevation.gain_actual_meters",
    ),
    "elevation_loss_m": (
        "elevation_loss_m",
        "elevationLossInMeters",
        "distance_data.summary.elevation.loss_actual_meters",
    ),
}


# ---------------------------------------------------------------------------
# Coercion helpers
# ---------------------------------------------------------------------------


def _pluck(record: dict, path: str) -> Any:
    node: Any = record
    for part in path.split("."):
        if not isinstance(node, dict):
            return None
        node = node.get(part)
    return node


def first_value(record: dict, field_name: str) -> Any:
    """Return the first non-null value among the paths for ``field_name``."""
    for path in FIELD_PATHS[field_name]:
        value = _pluck(record, path)
        if value is not None and value != "":
            return value
    return None


def _safe_int(value: object) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(round(float(value)))  # type: ignore[arg-type]
    except (TypeError, ValueError, OverflowError):
        return None


def _safe_float(value: object) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError, OverflowError):
        return None
    return number if math.isfinite(number) else None


def parse_datetime(value: Any) -> datetime | None:
    """Parse ISO-8601 strings or epoch seconds into an aware UTC datetime.

    Naive values are assumed to be UTC.  Returns None when unparseable or
    out of range (e.g. millisecond epochs).
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (ValueError, OverflowError, OSError):
            logger.warning("Epoch value out of range: %r", value)
            return None
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            logger.warning("Could not parse datetime value: %r", value)
            return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Body extraction
# ---------------------------------------------------------------------------


def extract_activity(body: Any, payload_id: str | None = None) -> dict:
    """Pick the activity record out of a provider response body.

    Accepts ``{"data": [...]}``, ``{"activity": {...}}`` or a bare record.
    When ``data`` holds several records the one whose id matches
    ``payload_id`` is preferred.

    Raises:
        NoDataError: If the body holds no activity.
    """
    if not isinstance(body, dict) or not body:
        raise NoDataError("Provider returned an empty or non-object body")

    if "data" in body:
        items = [item for item in (body.get("data") or []) if isinstance(item, dict) and item]
        if not items:
            raise NoDataError("Provider response contains no activity data")
        if len(items) > 1 and payload_id:
            for item in items:
                if str(first_value(item, "external_id") or "") == payload_id:
                    return item
            logger.info(
                "Provider returned %d activities for payload %s, using the first",
                len(items),
                payload_id,
            )
        return items[0]

    if isinstance(body.get("activity"), dict) and body["activity"]:
        return body["activity"]

    if first_value(body, "activity_type") is None and first_value(body, "duration_seconds") is None:
        raise NoDataError("Provider response has no recognizable activity fields")
    return body


# ---------------------------------------------------------------------------
# Mapping
# ---------------------------------------------------------------------------


def _round_opt(value: float | None, ndigits: int) -> float | None:
    return round(value, ndigits) if value is not None else None


def map_activity(
    activity: dict,
    *,
    local_user_id: str,
    provider: str,
    provider_user_id: str,
    payload_id: str,
    start_hint: datetime | None = None,
    raw_payload: dict | None = None,
    now: datetime | None = None,
    vocabulary: ActivityVocabulary | None = None,
) -> CanonicalActivity:
    """Build a ``CanonicalActivity`` draft from one provider activity record.

    Pure function: no I/O.  Missing fields stay ``None`` except where the
    defaulting policy in the module docstring says otherwise.

    Args:
        activity:         Single provider activity dict.
        local_user_id:    Resolved owner.
        provider:         Provider slug.
        provider_user_id: Provider's user id.
        payload_id:       Originating queue reference id.
        start_hint:       Start time carried on the queue reference.
        raw_payload:      Full provider response to keep for audit
                          (defaults to ``activity``).
        now:              Processing time (injected by tests).
        vocabulary:       Activity vocabulary (defaults to the global one).
    """
    vocabulary = vocabulary or get_activity_vocabulary()
    now = now or utc_now()

    start_time = parse_datetime(first_value(activity, "start_time"))
    start_source = "payload"
    if start_time is None and start_hint is not None:
        start_time = parse_datetime(start_hint)
        start_source = "hint"
    if start_time is None:
        start_time = now
        start_source = "processing_time"
        logger.info("Payload %s has no start time; using processing time", payload_id)

    end_time = parse_datetime(first_value(activity, "end_time"))

    duration = _safe_int(first_value(activity, "duration_seconds"))
    if duration is None and end_time is not None and start_source == "payload":
        duration = int((end_time - start_time).total_seconds())
        if duration < 0:
            duration = None
    if end_time is None and duration is not None:
        try:
            end_time = start_time + timedelta(seconds=duration)
        except OverflowError:
            logger.warning("Payload %s has out-of-range duration %r; ignoring", payload_id, duration)
            duration = None

    metres = _safe_float(first_value(activity, "distance_metres"))
    distance_km = round(metres / 1000, 2) if metres is not None else None

    pace = None
    if duration is not None and distance_km:
        pace = round(duration / 60 / distance_km, 2)

    calories = _safe_int(first_value(activity, "total_calories"))
    if calories is None:
        calories = _safe_int(first_value(activity, "active_calories"))

    external_id = first_value(activity, "external_id")

    return CanonicalActivity(
        local_user_id=local_user_id,
        provider=provider,
        provider_user_id=provider_user_id,
        payload_id=payload_id,
        activity_type=vocabulary.resolve(first_value(activity, "activity_type")),
        start_time=start_time,
        start_time_source=start_source,
        external_id=str(external_id) if external_id is not None else None,
        end_time=end_time,
        duration_seconds=duration,
        distance_km=distance_km,
        calories=calories,
        steps=_safe_int(first_value(activity, "steps")),
        avg_heart_rate=_safe_int(first_value(activity, "avg_heart_rate")),
        max_heart_rate=_safe_int(first_value(activity, "max_heart_rate")),
        elevation_gain_m=_round_opt(_safe_float(first_value(activity, "elevation_gain_m")), 1),
        elevation_loss_m=_round_opt(_safe_float(first_value(activity, "elevation_loss_m")), 1),
        pace_min_per_km=pace,
        raw_payload=raw_payload if raw_payload is not None else activity,
        created_at=now,
    )
