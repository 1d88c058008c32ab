# worker.py
import logging
import uuid

from errors import PayloadError
from models import (
    CUSTOM, DRIVER_OF_DAY_SUMMARY, RACE_LOCK_REMINDER, DispatchResult, DriverOfDayArgs, LockReminderArgs,
    utc_now,
)
from settings import MAX_JOBS_PER_RUN, POLL_INTERVAL
from templates import build_driver_of_day_cast, build_lock_reminder_cast

logger = logging.getLogger(__name__)

NO_VOTES_MESSAGE = "No Driver of the Day votes yet."


def _race_id(args):
    race_id = args.get("raceId")
    if isinstance(race_id, (int, float)) and not isinstance(race_id, bool):
        race_id = str(race_id)
    if not isinstance(race_id, str) or not race_id.strip():
        return None
    return race_id.strip()


def _channel(args, fallback):
    channel = args.get("channelId")
    return channel if isinstance(channel, str) and channel else fallback


def coerce_lock_args(args, channel_id=None):
    race_id = _race_id(args)
    lead = args.get("leadMinutes")
    if isinstance(lead, str):
        try:
            lead = int(lead.strip())
        except ValueError:
            lead = None
    if not race_id or isinstance(lead, bool) or not isinstance(lead, (int, float)):
        raise PayloadError("Invalid lock reminder payload arguments.")
    return LockReminderArgs(race_id=race_id, lead_minutes=int(lead), channel_id=_channel(args, channel_id))


def coerce_driver_of_day_args(args, channel_id=None):
    race_id = _race_id(args)
    if not race_id:
        raise PayloadError("Invalid Driver of the Day payload arguments.")
    return DriverOfDayArgs(race_id=race_id, channel_id=_channel(args, channel_id))


class Worker:
    """Claims due cast jobs and sends them one at a time."""

    def __init__(self, db, job_store, cast_client, clock=utc_now, worker_id=None,
                 poll_interval=POLL_INTERVAL, stop_event=None):
        self.db = db
        self.job_store = job_store
        self.cast_client = cast_client
        self.clock = clock
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self.poll_interval = poll_interval
        self.stop_event = stop_event  # threading.Event() passed in by CLI

    def run(self, cycle=None):
        """Invoke `cycle` every poll_interval seconds until the stop event is set."""
        cycle = cycle or self.dispatch_due
        while not (self.stop_event and self.stop_event.is_set()):
            try:
                cycle()
            except Exception:
                logger.exception("%s: scheduler cycle failed", self.worker_id)
            if self.stop_event:
                self.stop_event.wait(self.poll_interval)
            else:
                break

    def dispatch_due(self, limit=MAX_JOBS_PER_RUN):
        return self.dispatch_jobs(self.job_store.fetch_due(self.clock(), limit))

    def dispatch_jobs(self, due):
        stats = {"sent": 0, "failed": 0, "skipped": 0, "jobsConsidered": len(due)}

        # One job at a time, oldest scheduled_for first
        for job in due:
            claimed = self.job_store.claim(job)
            if not claimed:
                logger.debug("%s: job %s already claimed elsewhere", self.worker_id, job.id)
                continue
            result = self.dispatch(claimed)
            stats[result.status] += 1
        return stats

    def build_payload(self, job):
        """Payload for a claimed job, or (None, reason) when it is not ready to go out."""
        if job.template == RACE_LOCK_REMINDER:
            args = coerce_lock_args(job.payload_args, job.channel_id)
            return build_lock_reminder_cast(self.db, args), None
        if job.template == DRIVER_OF_DAY_SUMMARY:
            args = coerce_driver_of_day_args(job.payload_args, job.channel_id)
            dotd = build_driver_of_day_cast(self.db, args, now=self.clock())
            if not dotd.total_votes:
                return None, NO_VOTES_MESSAGE
            return dotd.payload, None
        if job.template == CUSTOM:
            raise PayloadError("Custom cast jobs must provide a handler.")
        raise PayloadError(f"Unsupported cast template: {job.template}")

    def dispatch(self, job):
        try:
            payload, not_ready = self.build_payload(job)
            if not_ready:
                # Stays retryable; backoff re-checks for votes later
                self.job_store.mark_failure(job, not_ready)
                return DispatchResult(job_id=job.id, status="skipped", error=not_ready)

            if job.channel_id and not payload.channel_id:
                payload.channel_id = job.channel_id

            response = self.cast_client.post(payload)
            self.job_store.mark_completed(job.id, response.raw)
            return DispatchResult(job_id=job.id, status="sent", response=response.raw)
        except Exception as e:
            message = str(e) or e.__class__.__name__
            self.job_store.mark_failure(job, message)
            return DispatchResult(job_id=job.id, status="failed", error=message)
