"""Normalize raw Oura records and merge them into the store.

Each known resource has a ``ResourceTransform``: a target table, its natural
key, the columns this resource owns, and a pure builder that coerces one raw
document into a typed record.  The registry is built once at import time;
resources without a transform are archived but otherwise ignored.

Merge rule: a write only ever touches the columns its resource owns.  Several
``daily_*`` resources share one ``daily_summaries`` row per day, so applying
them in any order yields the union of their fields, and applying the same
batch twice changes nothing.
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Callable, Sequence

from src.oura.errors import TransformError
from src.oura.models import (
    ActivityLog,
    DailySummary,
    HeartRateSample,
    RawArchiveEntry,
    RawDocument,
    SleepEpisode,
    UserTag,
)
from src.oura.repository import SyncStore

logger = logging.getLogger("oura_sync.oura.mapper")

#: High-volume resources that are not archived verbatim.
UNARCHIVED_RESOURCES: frozenset[str] = frozenset({"heartrate"})


# ---------------------------------------------------------------------------
# Coercion helpers: malformed values become None, never an exception
# ---------------------------------------------------------------------------

_NUMERIC = re.compile(r"[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")


def to_number(value: object) -> float | None:
    """Parse numbers and numeric-looking strings; everything else is None."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if not _NUMERIC.fullmatch(text):
            return None
        number = float(text)
    else:
        return None
    return number if math.isfinite(number) else None


def to_int(value: object) -> int | None:
    """Like ``to_number`` but rounded half-up to the nearest integer."""
    number = to_number(value)
    if number is None:
        return None
    return int(math.floor(number + 0.5))


def to_text(value: object) -> str | None:
    return value if isinstance(value, str) and value else None


def to_date(value: object) -> date | None:
    if not isinstance(value, str) or len(value) < 10:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


def to_datetime(value: object) -> datetime | None:
    """Parse an ISO-8601 string; naive values are assumed to be UTC."""
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _section(doc: RawDocument, key: str) -> dict:
    value = doc.get(key)
    return value if isinstance(value, dict) else {}


def _require_day(doc: RawDocument) -> date:
    day = to_date(doc.get("day"))
    if day is None:
        raise TransformError(f"record has no valid 'day': {doc.get('day')!r}")
    return day


def _require_id(doc: RawDocument) -> str:
    doc_id = doc.get("id")
    if isinstance(doc_id, (str, int)) and not isinstance(doc_id, bool) and str(doc_id):
        return str(doc_id)
    raise TransformError("record has no 'id'")


# ---------------------------------------------------------------------------
# Per-resource builders
# ---------------------------------------------------------------------------


def build_daily_readiness(doc: RawDocument) -> DailySummary:
    c = _section(doc, "contributors")
    return DailySummary(
        day=_require_day(doc),
        readiness_score=to_int(doc.get("score")),
        readiness_activity_balance=to_int(c.get("activity_balance")),
        readiness_body_temperature=to_int(c.get("body_temperature")),
        readiness_hrv_balance=to_int(c.get("hrv_balance")),
        readiness_previous_day_activity=to_int(c.get("previous_day_activity")),
        readiness_previous_night_sleep=to_int(c.get("previous_night")),
        readiness_recovery_index=to_int(c.get("recovery_index")),
        readiness_resting_heart_rate=to_int(c.get("resting_heart_rate")),
        readiness_sleep_balance=to_int(c.get("sleep_balance")),
        readiness_temperature_deviation=to_number(doc.get("temperature_deviation")),
    )


def build_daily_sleep(doc: RawDocument) -> DailySummary:
    c = _section(doc, "contributors")
    return DailySummary(
        day=_require_day(doc),
        sleep_score=to_int(doc.get("score")),
        sleep_deep_sleep=to_int(c.get("deep_sleep")),
        sleep_efficiency=to_int(c.get("efficiency")),
        sleep_latency=to_int(c.get("latency")),
        sleep_rem_sleep=to_int(c.get("rem_sleep")),
        sleep_restfulness=to_int(c.get("restfulness")),
        sleep_timing=to_int(c.get("timing")),
        sleep_total_sleep=to_int(c.get("total_sleep")),
    )


def build_daily_activity(doc: RawDocument) -> DailySummary:
    c = _section(doc, "contributors")
    return DailySummary(
        day=_require_day(doc),
        activity_score=to_int(doc.get("score")),
        activity_steps=to_int(doc.get("steps")),
        activity_active_calories=to_int(doc.get("active_calories")),
        activity_total_calories=to_int(doc.get("total_calories")),
        activity_meet_daily_targets=to_int(c.get("meet_daily_targets")),
        activity_move_every_hour=to_int(c.get("move_every_hour")),
        activity_recovery_time=to_int(c.get("recovery_time")),
        activity_stay_active=to_int(c.get("stay_active")),
        activity_training_frequency=to_int(c.get("training_frequency")),
        activity_training_volume=to_int(c.get("training_volume")),
    )


def build_daily_stress(doc: RawDocument) -> DailySummary:
    return DailySummary(
        day=_require_day(doc),
        stress_high=to_int(doc.get("stress_high")),
        recovery_high=to_int(doc.get("recovery_high")),
        stress_day_summary=to_text(doc.get("day_summary")),
    )


def build_daily_resilience(doc: RawDocument) -> DailySummary:
    c = _section(doc, "contributors")
    return DailySummary(
        day=_require_day(doc),
        resilience_level=to_text(doc.get("level")),
        resilience_contributors_sleep=to_int(c.get("sleep_recovery")),
        resilience_contributors_daytime=to_int(c.get("daytime_recovery")),
        resilience_contributors_stress=to_int(c.get("stress")),
    )


def build_daily_spo2(doc: RawDocument) -> DailySummary:
    return DailySummary(
        day=_require_day(doc),
        spo2_percentage=to_number(_section(doc, "spo2_percentage").get("average")),
        spo2_breathing_disturbance_index=to_int(doc.get("breathing_disturbance_index")),
    )


def build_daily_cardiovascular_age(doc: RawDocument) -> DailySummary:
    return DailySummary(day=_require_day(doc), cardiovascular_age=to_int(doc.get("vascular_age")))


def build_vo2_max(doc: RawDocument) -> DailySummary:
    return DailySummary(day=_require_day(doc), vo2_max=to_number(doc.get("vo2_max")))


def build_heart_rate_sample(doc: RawDocument) -> HeartRateSample:
    timestamp = to_datetime(doc.get("timestamp"))
    if timestamp is None:
        raise TransformError(f"heartrate sample has no valid timestamp: {doc.get('timestamp')!r}")
    return HeartRateSample(
        timestamp=timestamp,
        bpm=to_int(doc.get("bpm")),
        source=to_text(doc.get("source")),
    )


def build_sleep_episode(doc: RawDocument) -> SleepEpisode:
    return SleepEpisode(
        id=_require_id(doc),
        day=to_date(doc.get("day")),
        start_datetime=to_datetime(doc.get("bedtime_start")),
        end_datetime=to_datetime(doc.get("bedtime_end")),
        type=to_text(doc.get("type")),
        heart_rate_avg=to_number(doc.get("average_heart_rate")),
        heart_rate_lowest=to_number(doc.get("lowest_heart_rate")),
        hrv_avg=to_number(doc.get("average_hrv")),
        breath_avg=to_number(doc.get("average_breath")),
        temperature_deviation=to_number(_section(doc, "readiness").get("temperature_deviation")),
        deep_duration=to_int(doc.get("deep_sleep_duration")),
        rem_duration=to_int(doc.get("rem_sleep_duration")),
        light_duration=to_int(doc.get("light_sleep_duration")),
        awake_duration=to_int(doc.get("awake_time")),
    )


def build_workout(doc: RawDocument) -> ActivityLog:
    return ActivityLog(
        id=_require_id(doc),
        type="workout",
        start_datetime=to_datetime(doc.get("start_datetime")),
        end_datetime=to_datetime(doc.get("end_datetime")),
        activity_label=to_text(doc.get("label")) or to_text(doc.get("activity")),
        intensity=to_text(doc.get("intensity")),
        calories=to_number(doc.get("calories")),
        distance=to_number(doc.get("distance")),
    )


def build_session(doc: RawDocument) -> ActivityLog:
    # heart_rate is a sample series: {"interval": 5, "items": [...], "timestamp": ...}
    items = _section(doc, "heart_rate").get("items")
    samples = [n for n in map(to_number, items if isinstance(items, list) else []) if n is not None]
    return ActivityLog(
        id=_require_id(doc),
        type="session",
        start_datetime=to_datetime(doc.get("start_datetime")),
        end_datetime=to_datetime(doc.get("end_datetime")),
        activity_label=to_text(doc.get("type")),
        hr_avg=sum(samples) / len(samples) if samples else None,
        mood=to_text(doc.get("mood")),
    )


def build_tag(doc: RawDocument) -> UserTag:
    tags = doc.get("tags")
    labels = [t for t in tags if isinstance(t, str) and t] if isinstance(tags, list) else []
    return UserTag(
        id=_require_id(doc),
        day=to_date(doc.get("day")) or to_date(doc.get("timestamp")),
        tag_type=",".join(labels) or None,
        comment=to_text(doc.get("text")),
    )


def build_enhanced_tag(doc: RawDocument) -> UserTag:
    return UserTag(
        id=_require_id(doc),
        day=to_date(doc.get("start_day")) or to_date(doc.get("start_time")),
        tag_type=to_text(doc.get("tag_type_code")) or to_text(doc.get("custom_name")),
        comment=to_text(doc.get("comment")),
    )


# ---------------------------------------------------------------------------
# Transform registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ResourceTransform:
    """How one resource lands in the store.

    Attributes:
        table:   Destination table.
        key:     Natural-key column (first entry of ``columns``).
        columns: Columns this resource owns; nothing else is written.
        build:   Raw document → typed record; raises TransformError to skip.
    """

    table: str
    key: str
    columns: tuple[str, ...]
    build: Callable[[RawDocument], Any]

    def row(self, record: Any) -> tuple:
        return tuple(getattr(record, column) for column in self.columns)


def _daily(build: Callable[[RawDocument], DailySummary], *columns: str) -> ResourceTransform:
    return ResourceTransform(table="daily_summaries", key="day", columns=("day", *columns), build=build)


_SLEEP_EPISODE_COLUMNS = (
    "id", "day", "start_datetime", "end_datetime", "type", "heart_rate_avg",
    "heart_rate_lowest", "hrv_avg", "breath_avg", "temperature_deviation",
    "deep_duration", "rem_duration", "light_duration", "awake_duration",
)
_ACTIVITY_LOG_COLUMNS = (
    "id", "type", "start_datetime", "end_datetime", "activity_label",
    "intensity", "calories", "distance", "hr_avg", "mood",
)
_USER_TAG_COLUMNS = ("id", "day", "tag_type", "comment")


TRANSFORMS: dict[str, ResourceTransform] = {
    "daily_readiness": _daily(
        build_daily_readiness,
        "readiness_score",
        "readiness_activity_balance",
        "readiness_body_temperature",
        "readiness_hrv_balance",
        "readiness_previous_day_activity",
        "readiness_previous_night_sleep",
        "readiness_recovery_index",
        "readiness_resting_heart_rate",
        "readiness_sleep_balance",
        "readiness_temperature_deviation",
    ),
    "daily_sleep": _daily(
        build_daily_sleep,
        "sleep_score",
        "sleep_deep_sleep",
        "sleep_efficiency",
        "sleep_latency",
        "sleep_rem_sleep",
        "sleep_restfulness",
        "sleep_timing",
        "sleep_total_sleep",
    ),
    "daily_activity": _daily(
        build_daily_activity,
        "activity_score",
        "activity_steps",
        "activity_active_calories",
        "activity_total_calories",
        "activity_meet_daily_targets",
        "activity_move_every_hour",
        "activity_recovery_time",
        "activity_stay_active",
        "activity_training_frequency",
        "activity_training_volume",
    ),
    "daily_stress": _daily(build_daily_stress, "stress_high", "recovery_high", "stress_day_summary"),
    "daily_resilience": _daily(
        build_daily_resilience,
        "resilience_level",
        "resilience_contributors_sleep",
        "resilience_contributors_daytime",
        "resilience_contributors_stress",
    ),
    "daily_spo2": _daily(build_daily_spo2, "spo2_percentage", "spo2_breathing_disturbance_index"),
    "daily_cardiovascular_age": _daily(build_daily_cardiovascular_age, "cardiovascular_age"),
    "vO2_max": _daily(build_vo2_max, "vo2_max"),
    "heartrate": ResourceTransform(
        table="heart_rate_samples",
        key="timestamp",
        columns=("timestamp", "bpm", "source"),
        build=build_heart_rate_sample,
    ),
    "sleep": ResourceTransform(
        table="sleep_episodes", key="id", columns=_SLEEP_EPISODE_COLUMNS, build=build_sleep_episode
    ),
    "workout": ResourceTransform(
        table="activity_logs", key="id", columns=_ACTIVITY_LOG_COLUMNS, build=build_workout
    ),
    "session": ResourceTransform(
        table="activity_logs", key="id", columns=_ACTIVITY_LOG_COLUMNS, build=build_session
    ),
    "tag": ResourceTransform(
        table="user_tags", key="id", columns=_USER_TAG_COLUMNS, build=build_tag
    ),
    "enhanced_tag": ResourceTransform(
        table="user_tags", key="id", columns=_USER_TAG_COLUMNS, build=build_enhanced_tag
    ),
}


# ---------------------------------------------------------------------------
# Raw archive helpers
# ---------------------------------------------------------------------------


def _first_text(doc: RawDocument, *keys: str) -> str | None:
    for key in keys:
        value = to_text(doc.get(key))
        if value:
            return value
    return None


def payload_content_hash(payload: RawDocument) -> str:
    """SHA-256 of the canonicalized JSON, used as a stable fallback document id."""
    canonical = json.dumps(payload, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def archive_entry(doc: RawDocument) -> RawArchiveEntry:
    """Locate day/start/end on a raw document and pick its archive id."""
    start_at = _first_text(
        doc, "start_datetime", "start_time", "bedtime_start", "bedtime_start_datetime",
        "timestamp", "start",
    )
    end_at = _first_text(doc, "end_datetime", "end_time", "bedtime_end", "bedtime_end_datetime", "end")
    day = to_text(doc.get("day"))
    if day is None:
        for candidate in (start_at, end_at):
            if candidate and len(candidate) >= 10:
                day = candidate[:10]
                break

    doc_id = doc.get("id")
    if isinstance(doc_id, (str, int)) and not isinstance(doc_id, bool) and str(doc_id):
        document_id = str(doc_id)
    else:
        document_id = start_at or day or payload_content_hash(doc)
    return RawArchiveEntry(document_id=document_id, payload=doc, day=day, start_at=start_at, end_at=end_at)


# ---------------------------------------------------------------------------
# Mapper
# ---------------------------------------------------------------------------


class UpsertMapper:
    """Turns batches of raw records into merge-writes against the store."""

    def __init__(
        self,
        store: SyncStore,
        subject_id: str,
        batch_size: int = 500,
        transforms: dict[str, ResourceTransform] | None = None,
    ) -> None:
        self._store = store
        self._subject_id = subject_id
        self._batch_size = batch_size
        self._transforms = TRANSFORMS if transforms is None else transforms

    def normalize(self, resource: str, documents: Sequence[object]) -> list[Any]:
        """Build typed records for ``documents``; untransformable ones are skipped."""
        transform = self._transforms.get(resource)
        if transform is None:
            return []
        records: list[Any] = []
        skipped = 0
        for doc in documents:
            if not isinstance(doc, dict):
                skipped += 1
                continue
            try:
                records.append(transform.build(doc))
            except TransformError as exc:
                skipped += 1
                logger.debug("Skipping %s record: %s", resource, exc)
        if skipped:
            logger.info("Skipped %d malformed %s record(s)", skipped, resource)
        return records

    async def apply(self, resource: str, documents: Sequence[object]) -> int:
        """Archive and merge one page of ``resource`` records.

        Returns:
            Number of normalized rows written.
        """
        if resource not in UNARCHIVED_RESOURCES:
            entries = [archive_entry(d) for d in documents if isinstance(d, dict)]
            await self._store.save_raw_documents(self._subject_id, resource, entries)

        transform = self._transforms.get(resource)
        if transform is None:
            return 0

        rows = [transform.row(r) for r in self.normalize(resource, documents)]
        for start in range(0, len(rows), self._batch_size):
            await self._store.upsert_rows(
                transform.table,
                transform.key,
                transform.columns,
                rows[start:start + self._batch_size],
            )
        return len(rows)

    async def archive_singleton(self, resource: str, payload: RawDocument) -> None:
        """Archive a bare-object response (e.g. personal_info) under the resource name."""
        await self._store.save_raw_documents(
            self._subject_id,
            resource,
            [RawArchiveEntry(document_id=resource, payload=payload)],
        )
