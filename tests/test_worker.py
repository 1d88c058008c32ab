# tests/test_worker.py
"""Tests for worker.py - claiming and dispatching due cast jobs."""

import threading
from datetime import timedelta

import pytest

from cast_client import CastClient
from conftest import NOW, FakeResponse, FakeSession, add_race
from errors import PayloadError
from job_store import JobStore
from models import COMPLETED, CUSTOM, DRIVER_OF_DAY_SUMMARY, FAILED, PENDING, RACE_LOCK_REMINDER, parse_iso, to_iso
from worker import NO_VOTES_MESSAGE, Worker, coerce_driver_of_day_args, coerce_lock_args


@pytest.fixture
def store(db, clock):
    return JobStore(db, clock=clock)


def _job(store, template, args, key=None):
    return store.insert(template, args, key or f"{template}:{args}", to_iso(NOW - timedelta(minutes=1)))


def _worker(db, store, clock, session=None, dry_run=True):
    return Worker(db, store, CastClient(dry_run=dry_run, session=session or FakeSession()), clock=clock)


def test_coerce_lock_args():
    args = coerce_lock_args({"raceId": 42, "leadMinutes": "60"}, channel_id="f1")
    assert (args.race_id, args.lead_minutes, args.channel_id) == ("42", 60, "f1")
    assert coerce_lock_args({"raceId": "r1", "leadMinutes": 60, "channelId": "own"}, "f1").channel_id == "own"

    for bad in ({"leadMinutes": 60}, {"raceId": "r1"}, {"raceId": "r1", "leadMinutes": True},
                {"raceId": " ", "leadMinutes": 60}, {"raceId": "r1", "leadMinutes": "soon"}):
        with pytest.raises(PayloadError):
            coerce_lock_args(bad)


def test_coerce_driver_of_day_args():
    assert coerce_driver_of_day_args({"raceId": "r1"}).race_id == "r1"
    with pytest.raises(PayloadError):
        coerce_driver_of_day_args({})


def test_lock_reminder_sent(db, store, clock, neynar_env):
    add_race(db, "r1", lock_time=NOW + timedelta(hours=1))
    job = _job(store, RACE_LOCK_REMINDER, {"raceId": "r1", "leadMinutes": 60})

    stats = _worker(db, store, clock).dispatch_due()

    assert stats == {"sent": 1, "failed": 0, "skipped": 0, "jobsConsidered": 1}
    done = store.get(job.id)
    assert done.status == COMPLETED
    assert done.attempt_count == 1
    assert done.response_body["payload"]["text"].startswith("🚨 Predictions close in 1h")


def test_job_channel_applied_to_payload(db, store, clock, neynar_env):
    add_race(db, "r1", lock_time=NOW + timedelta(hours=1))
    job = _job(store, RACE_LOCK_REMINDER, {"raceId": "r1", "leadMinutes": 60})
    store.update_by_id(job.id, {"channel_id": "f1"})

    _worker(db, store, clock).dispatch_due()
    assert store.get(job.id).response_body["payload"]["channel_id"] == "f1"


def test_driver_of_day_without_votes_is_skipped(db, store, clock, neynar_env):
    add_race(db, "r1", status="completed")
    job = _job(store, DRIVER_OF_DAY_SUMMARY, {"raceId": "r1"})

    stats = _worker(db, store, clock).dispatch_due()

    assert stats["skipped"] == 1
    retry = store.get(job.id)
    assert retry.status == PENDING
    assert retry.last_error == NO_VOTES_MESSAGE
    assert parse_iso(retry.scheduled_for) == NOW + timedelta(minutes=5)


def test_driver_of_day_with_votes_is_sent(db, store, clock, neynar_env):
    add_race(db, "r1", status="completed")
    db.add_driver("nor", "Lando Norris", team="McLaren", number=4)
    db.add_dotd_vote("r1", "u1", "nor")
    job = _job(store, DRIVER_OF_DAY_SUMMARY, {"raceId": "r1"})

    assert _worker(db, store, clock).dispatch_due()["sent"] == 1
    assert "1. #4 Lando Norris (McLaren) - 100% (1)" in store.get(job.id).response_body["payload"]["text"]


def test_transport_failure_backs_off(db, store, clock, neynar_env):
    add_race(db, "r1", lock_time=NOW + timedelta(hours=1))
    job = _job(store, RACE_LOCK_REMINDER, {"raceId": "r1", "leadMinutes": 60})
    session = FakeSession([FakeResponse(500, {"message": "upstream down"})])

    stats = _worker(db, store, clock, session=session, dry_run=False).dispatch_due()

    assert stats["failed"] == 1
    retry = store.get(job.id)
    assert retry.status == PENDING
    assert retry.last_error == "Farcaster cast failed (500): upstream down"


def test_malformed_args_and_unknown_template_fail(db, store, clock, neynar_env):
    bad = _job(store, RACE_LOCK_REMINDER, {"raceId": "r1"})
    custom = _job(store, CUSTOM, {"text": "hi"})
    missing_race = _job(store, DRIVER_OF_DAY_SUMMARY, {"raceId": "ghost"})

    stats = _worker(db, store, clock).dispatch_due()

    assert stats == {"sent": 0, "failed": 3, "skipped": 0, "jobsConsidered": 3}
    assert store.get(bad.id).last_error == "Invalid lock reminder payload arguments."
    assert store.get(custom.id).last_error == "Custom cast jobs must provide a handler."
    assert store.get(missing_race.id).last_error == "Race ghost not found"


def test_exhausted_job_fails_terminally(db, clock, neynar_env):
    store = JobStore(db, max_attempts=1, clock=clock)
    job = _job(store, RACE_LOCK_REMINDER, {"raceId": "gone", "leadMinutes": 60})

    _worker(db, store, clock).dispatch_due()
    assert store.get(job.id).status == FAILED


def test_already_claimed_job_is_not_counted(db, store, clock, neynar_env):
    add_race(db, "r1", lock_time=NOW + timedelta(hours=1))
    job = _job(store, RACE_LOCK_REMINDER, {"raceId": "r1", "leadMinutes": 60})
    due = store.fetch_due(NOW, 10)
    store.claim(job)

    stats = _worker(db, store, clock).dispatch_jobs(due)
    assert stats == {"sent": 0, "failed": 0, "skipped": 0, "jobsConsidered": 1}


def test_run_loop_stops_on_event(db, store, clock):
    stop = threading.Event()
    calls = []

    def cycle():
        calls.append(1)
        if len(calls) == 2:
            raise RuntimeError("transient")
        if len(calls) == 3:
            stop.set()

    Worker(db, store, CastClient(dry_run=True), clock=clock, poll_interval=0, stop_event=stop).run(cycle)
    assert len(calls) == 3
