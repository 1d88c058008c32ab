# scheduler.py
import json
import logging
from datetime import datetime, timedelta, timezone

from cast_client import CastClient
from errors import ConflictError, PayloadError
from job_store import JobStore
from models import (
    COMPLETED, DRIVER_OF_DAY_SUMMARY, FAILED, PENDING, RACE_LOCK_REMINDER, parse_iso, to_iso, utc_now,
)
from settings import Settings
from templates import default_driver_of_day_publish_at
from worker import NO_VOTES_MESSAGE, Worker

logger = logging.getLogger(__name__)

# Reminders whose trigger time already passed still go out, shortly after now.
CLAMP_DELAY = timedelta(seconds=5)


def stable_serialize(value):
    """JSON with object keys sorted, so logically equal args always serialize the same."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def compute_job_key(template, payload_args):
    return f"{template}:{stable_serialize(payload_args)}"


def _as_datetime(value):
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    try:
        return parse_iso(value)
    except (TypeError, ValueError):
        return None


class Scheduler:
    """Makes sure the right cast jobs exist; stateless between invocations."""

    def __init__(self, db, job_store, settings=None, clock=utc_now):
        self.db = db
        self.job_store = job_store
        self.settings = settings or Settings()
        self.clock = clock

    def ensure_scheduled_job(self, template, payload_args, scheduled_for, channel_id=None,
                             trigger_at=None, job_key=None):
        """
        Idempotent create-or-refresh keyed on (template, payload_args).

        - no job yet: insert a pending one
        - completed: left untouched
        - otherwise: channel refreshed; when the computed trigger time changed the job
          is rescheduled, and a failed job is re-armed as pending
        - failed while waiting for Driver of the Day votes: re-armed as pending
        """
        job_key = job_key or compute_job_key(template, payload_args)
        scheduled = _as_datetime(scheduled_for) or self.clock()
        scheduled_iso = to_iso(scheduled)
        trigger_iso = to_iso(_as_datetime(trigger_at) or scheduled)

        existing = self.job_store.find_by_key(job_key)
        if existing is None:
            try:
                return self.job_store.insert(template, payload_args, job_key, scheduled_iso,
                                             channel_id=channel_id, trigger_at=trigger_iso)
            except ConflictError:
                # Another invocation inserted it between our lookup and insert.
                existing = self.job_store.find_by_key(job_key)
                if existing is None:
                    raise

        if existing.status == COMPLETED:
            return existing

        patch = {"channel_id": channel_id or existing.channel_id}
        if existing.trigger_at != trigger_iso:
            patch["scheduled_for"] = scheduled_iso
            patch["trigger_at"] = trigger_iso
            if existing.status == FAILED:
                patch["status"] = PENDING
                patch["last_error"] = None
                logger.info("Job %s: failed -> pending (rescheduled for %s)", existing.id, scheduled_iso)
        elif existing.status == FAILED and existing.last_error == NO_VOTES_MESSAGE:
            # Not ready rather than broken; re-check votes on every scan.
            patch["status"] = PENDING
            logger.info("Job %s: failed -> pending (waiting for votes)", existing.id)

        updated = self.job_store.update_by_id(existing.id, patch)
        return updated or existing

    def ensure_lock_reminder_jobs_for_race(self, race_id, lock_time, lead_offsets=None, channel_id=None):
        lock = _as_datetime(lock_time)
        if lock is None:
            raise PayloadError(f"Invalid lock time for race {race_id}")

        now = self.clock()
        offsets = lead_offsets or self.settings.lock_reminder_offsets
        jobs = []
        for minutes in offsets:
            trigger = lock - timedelta(minutes=minutes)
            scheduled = now + CLAMP_DELAY if trigger < now else trigger
            jobs.append(self.ensure_scheduled_job(
                RACE_LOCK_REMINDER,
                {"raceId": race_id, "leadMinutes": minutes},
                scheduled,
                channel_id=channel_id,
                trigger_at=trigger,
            ))
        return jobs

    def ensure_driver_of_day_summary_job(self, race_id, race_date=None, lock_time=None,
                                         publish_at=None, channel_id=None):
        publish = publish_at or default_driver_of_day_publish_at(lock_time, race_date, self.clock())
        return self.ensure_scheduled_job(
            DRIVER_OF_DAY_SUMMARY,
            {"raceId": race_id},
            publish,
            channel_id=channel_id,
        )

    def schedule_lock_reminders(self):
        stats = {"racesProcessed": 0, "errors": []}
        since = self.clock() - timedelta(hours=self.settings.lock_lookback_hours)
        try:
            races = self.db.races_locking_after(to_iso(since), self.settings.lock_scan_limit)
        except Exception as e:
            stats["errors"].append(f"Failed to load races: {e}")
            return stats

        for race in races:
            if not race.lock_time:
                continue
            try:
                self.ensure_lock_reminder_jobs_for_race(race.id, race.lock_time)
                stats["racesProcessed"] += 1
            except Exception as e:
                logger.warning("Lock reminder scheduling failed for race %s: %s", race.id, e)
                stats["errors"].append(f"Race {race.id}: {e}")
        return stats

    def schedule_driver_of_day_summaries(self):
        stats = {"racesProcessed": 0, "errors": []}
        try:
            races = self.db.completed_races(self.settings.dotd_scan_limit)
        except Exception as e:
            stats["errors"].append(f"Failed to load completed races: {e}")
            return stats

        for race in races:
            try:
                self.ensure_driver_of_day_summary_job(race.id, race_date=race.race_date, lock_time=race.lock_time)
                stats["racesProcessed"] += 1
            except Exception as e:
                logger.warning("Driver of the Day scheduling failed for race %s: %s", race.id, e)
                stats["errors"].append(f"Driver of the Day scheduling failed for {race.id}: {e}")
        return stats

    def fetch_due_jobs(self, limit=None):
        return self.job_store.fetch_due(self.clock(), limit or self.settings.max_jobs_per_run)


def run_cycle(db, settings=None, cast_client=None, clock=utc_now, limit=None, worker=None):
    """
    One scheduler invocation: lock reminders, Driver of the Day summaries, then
    dispatch of up to `limit` due jobs. Partial failures are reported, never raised.

    A long-running `worker` brings its own job store, cast client and clock.
    """
    settings = settings or Settings.from_storage(db)
    if worker is None:
        job_store = JobStore.from_settings(db, settings, clock=clock)
        worker = Worker(db, job_store, cast_client or CastClient(timeout=settings.request_timeout), clock=clock)
    scheduler = Scheduler(db, worker.job_store, settings, clock=worker.clock)

    lock_stats = scheduler.schedule_lock_reminders()
    dotd_stats = scheduler.schedule_driver_of_day_summaries()
    dispatch_stats = worker.dispatch_jobs(scheduler.fetch_due_jobs(limit))

    summary = {
        "ok": True,
        "scheduled": {"lockReminders": lock_stats, "driverOfDay": dotd_stats},
        "dispatched": dispatch_stats,
    }
    logger.info("Scheduler run: %s", json.dumps(summary))
    return summary
