# models.py
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"
JOB_STATUSES = (PENDING, PROCESSING, COMPLETED, FAILED)

RACE_LOCK_REMINDER = "race-lock-reminder"
DRIVER_OF_DAY_SUMMARY = "driver-of-day-summary"
CUSTOM = "custom"
TEMPLATES = (RACE_LOCK_REMINDER, DRIVER_OF_DAY_SUMMARY, CUSTOM)


def utc_now():
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Fixed-width UTC ISO string so stored timestamps sort lexicographically."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds")


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass
class CastJob:
    id: str
    template: str
    payload_args: dict
    scheduled_for: str
    job_key: Optional[str] = None
    trigger_at: Optional[str] = None   # computed time before any clamping
    status: str = PENDING   # pending | processing | completed | failed
    attempt_count: int = 0
    last_attempt_at: Optional[str] = None
    completed_at: Optional[str] = None
    channel_id: Optional[str] = None
    last_error: Optional[str] = None
    response_body: Optional[dict] = None
    created_at: str = field(default_factory=lambda: to_iso(utc_now()))
    updated_at: str = field(default_factory=lambda: to_iso(utc_now()))

    def to_dict(self):
        return {
            "id": self.id,
            "template": self.template,
            "payloadArgs": self.payload_args,
            "jobKey": self.job_key,
            "status": self.status,
            "scheduledFor": self.scheduled_for,
            "triggerAt": self.trigger_at,
            "attemptCount": self.attempt_count,
            "lastAttemptAt": self.last_attempt_at,
            "completedAt": self.completed_at,
            "channelId": self.channel_id,
            "lastError": self.last_error,
            "responseBody": self.response_body,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class Race:
    id: str
    name: str
    lock_time: str
    status: str = "upcoming"   # upcoming | locked | completed
    circuit: Optional[str] = None
    race_date: Optional[str] = None
    season: Optional[int] = None
    round: Optional[int] = None


@dataclass
class CastEmbed:
    url: str


@dataclass
class CastPayload:
    text: str
    embeds: list = field(default_factory=list)
    channel_id: Optional[str] = None


@dataclass
class LockReminderArgs:
    race_id: str
    lead_minutes: int
    channel_id: Optional[str] = None


@dataclass
class DriverOfDayArgs:
    race_id: str
    channel_id: Optional[str] = None


@dataclass
class VoteTally:
    driver: dict   # id, name, team, number
    votes: int
    percentage: int


@dataclass
class DispatchResult:
    job_id: str
    status: str   # sent | skipped | failed
    error: Optional[str] = None
    response: Optional[dict] = None
