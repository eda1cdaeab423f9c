"""Core data models for the Oura sync engine.

Raw API payloads are loosely-typed dicts at the ingestion boundary.  They are
coerced into the dataclasses below by the upsert mapper before anything is
written, so the dynamic shape never travels past ``mapper.py``.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any

#: A single raw record as returned by the Oura API.
RawDocument = dict[str, Any]


# ---------------------------------------------------------------------------
# Resource catalog
# ---------------------------------------------------------------------------


class QueryMode(str, enum.Enum):
    """How a resource endpoint accepts its time window."""

    NONE = "none"
    DATE = "date"
    DATETIME = "datetime"


@dataclass(frozen=True)
class ResourceDescriptor:
    """One syncable remote collection.

    Attributes:
        name:       Resource slug (e.g. 'daily_sleep', 'heartrate').
        path:       Endpoint path relative to the API base.
        query_mode: Window encoding the endpoint expects.
        paginated:  True if the endpoint accepts a ``next_token`` cursor.
    """

    name: str
    path: str
    query_mode: QueryMode = QueryMode.NONE
    paginated: bool = False

    @property
    def windowed(self) -> bool:
        return self.query_mode is not QueryMode.NONE

    def to_json(self) -> dict:
        return {
            "name": self.name,
            "path": self.path,
            "query_mode": self.query_mode.value,
            "paginated": self.paginated,
        }

    @classmethod
    def from_json(cls, data: dict) -> "ResourceDescriptor":
        return cls(
            name=data["name"],
            path=data["path"],
            query_mode=QueryMode(data.get("query_mode", "none")),
            paginated=bool(data.get("paginated", False)),
        )


@dataclass(frozen=True)
class TimeWindow:
    """Inclusive day-granularity window ``[start, end]``."""

    start: date
    end: date

    @property
    def span_days(self) -> int:
        return (self.end - self.start).days

    @classmethod
    def ending_days_ago(cls, today: date, end_offset: int, start_offset: int) -> "TimeWindow":
        """Build a window from offsets counted backwards from ``today``."""
        return cls(
            start=today - timedelta(days=start_offset),
            end=today - timedelta(days=end_offset),
        )


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


@dataclass
class TokenResponse:
    """Token pair returned by the Oura authorization server.

    Attributes:
        access_token:  Bearer token for API calls.
        refresh_token: Token used to obtain a new access token (may be omitted on refresh).
        expires_in:    Lifetime of ``access_token`` in seconds.
        scope:         Granted scopes, space separated.
        token_type:    Usually "Bearer".
    """

    access_token: str
    refresh_token: str | None = None
    expires_in: int | None = None
    scope: str | None = None
    token_type: str | None = None

    def expires_at(self, now: datetime) -> datetime | None:
        if self.expires_in is None:
            return None
        return now + timedelta(seconds=max(0, self.expires_in))


@dataclass
class CredentialRecord:
    """The persisted credential row (exactly one per subject)."""

    subject_id: str
    access_token: str | None
    refresh_token: str | None = None
    expires_at: datetime | None = None
    scope: str | None = None
    token_type: str | None = None

    def is_fresh(self, now: datetime, margin: timedelta) -> bool:
        """True if the access token is usable for at least ``margin`` longer.

        A stored token with no known expiry is treated as usable.
        """
        if not self.access_token:
            return False
        if self.expires_at is None:
            return True
        return self.expires_at > now + margin


@dataclass(frozen=True)
class PendingAuthorization:
    """Single-use anti-replay state created when an OAuth flow starts."""

    state: str
    subject_id: str
    created_at: datetime

    def is_expired(self, now: datetime, ttl: timedelta) -> bool:
        return now - self.created_at > ttl


# ---------------------------------------------------------------------------
# Normalized records
# ---------------------------------------------------------------------------


@dataclass
class DailySummary:
    """One calendar day of merged scores.

    Several resources contribute disjoint column sets to the same row; a
    transform only fills the columns it owns and the writer only persists
    those.
    """

    day: date
    readiness_score: int | None = None
    readiness_activity_balance: int | None = None
    readiness_body_temperature: int | None = None
    readiness_hrv_balance: int | None = None
    readiness_previous_day_activity: int | None = None
    readiness_previous_night_sleep: int | None = None
    readiness_recovery_index: int | None = None
    readiness_resting_heart_rate: int | None = None
    readiness_sleep_balance: int | None = None
    readiness_temperature_deviation: float | None = None
    sleep_score: int | None = None
    sleep_deep_sleep: int | None = None
    sleep_efficiency: int | None = None
    sleep_latency: int | None = None
    sleep_rem_sleep: int | None = None
    sleep_restfulness: int | None = None
    sleep_timing: int | None = None
    sleep_total_sleep: int | None = None
    activity_score: int | None = None
    activity_steps: int | None = None
    activity_active_calories: int | None = None
    activity_total_calories: int | None = None
    activity_meet_daily_targets: int | None = None
    activity_move_every_hour: int | None = None
    activity_recovery_time: int | None = None
    activity_stay_active: int | None = None
    activity_training_frequency: int | None = None
    activity_training_volume: int | None = None
    stress_high: int | None = None
    recovery_high: int | None = None
    stress_day_summary: str | None = None
    resilience_level: str | None = None
    resilience_contributors_sleep: int | None = None
    resilience_contributors_daytime: int | None = None
    resilience_contributors_stress: int | None = None
    spo2_percentage: float | None = None
    spo2_breathing_disturbance_index: int | None = None
    cardiovascular_age: int | None = None
    vo2_max: float | None = None


@dataclass
class SleepEpisode:
    """One sleep period (long sleep or nap); durations in seconds."""

    id: str
    day: date | None = None
    start_datetime: datetime | None = None
    end_datetime: datetime | None = None
    type: str | None = None
    heart_rate_avg: float | None = None
    heart_rate_lowest: float | None = None
    hrv_avg: float | None = None
    breath_avg: float | None = None
    temperature_deviation: float | None = None
    deep_duration: int | None = None
    rem_duration: int | None = None
    light_duration: int | None = None
    awake_duration: int | None = None


@dataclass
class HeartRateSample:
    timestamp: datetime
    bpm: int | None = None
    source: str | None = None


@dataclass
class ActivityLog:
    """A workout or a guided session (``type`` tells them apart)."""

    id: str
    type: str
    start_datetime: datetime | None = None
    end_datetime: datetime | None = None
    activity_label: str | None = None
    intensity: str | None = None
    calories: float | None = None
    distance: float | None = None
    hr_avg: float | None = None
    mood: str | None = None


@dataclass
class UserTag:
    id: str
    day: date | None = None
    tag_type: str | None = None
    comment: str | None = None


@dataclass(frozen=True)
class RawArchiveEntry:
    """One raw document as archived verbatim in ``oura_raw_documents``."""

    document_id: str
    payload: RawDocument
    day: str | None = None
    start_at: str | None = None
    end_at: str | None = None


# ---------------------------------------------------------------------------
# Sync results
# ---------------------------------------------------------------------------


class ResourceStatus(str, enum.Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    DONE = "done"
    FAILED = "failed"


@dataclass
class ResourceOutcome:
    """Settled result of one resource within a sync run.

    Attributes:
        resource: Resource slug.
        status:   ``DONE`` or ``FAILED`` once settled.
        windows:  Number of windows whose fetch+map cycle completed.
        requests: HTTP requests issued for this resource (including retries).
        error:    Error message if the resource failed.
    """

    resource: str
    status: ResourceStatus = ResourceStatus.PENDING
    windows: int = 0
    requests: int = 0
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status is ResourceStatus.DONE


@dataclass
class SyncSummary:
    """Aggregate result of one ``sync`` call; every resource is accounted for."""

    outcomes: list[ResourceOutcome] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def successful(self) -> int:
        return sum(1 for o in self.outcomes if o.succeeded)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if o.status is ResourceStatus.FAILED)

    @property
    def total_requests(self) -> int:
        return sum(o.requests for o in self.outcomes)

    def to_json(self) -> dict:
        return {
            "successful": self.successful,
            "failed": self.failed,
            "total_requests": self.total_requests,
            "duration_ms": self.duration_ms,
            "resources": [
                {
                    "resource": o.resource,
                    "status": o.status.value,
                    "windows": o.windows,
                    "requests": o.requests,
                    "error": o.error,
                }
                for o in self.outcomes
            ],
        }


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
