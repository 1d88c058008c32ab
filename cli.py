# cli.py
import json
import logging
import threading
import time

import click

from admin import AdminActions
from cast_client import CastClient
from errors import CastQueueError
from job_store import JobStore
from models import JOB_STATUSES, Race, parse_iso, to_iso
from notifications import NotificationClient
from scheduler import run_cycle
from settings import Settings
from storage import Storage


def setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _store(db):
    return JobStore.from_settings(db, Settings.from_storage(db))


def _echo_json(data):
    click.echo(json.dumps(data, indent=2, ensure_ascii=False, default=str))


@click.group()
@click.option("--db", "db_file", default=None, envvar="CASTQUEUE_DB", help="SQLite database path")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx, db_file, verbose):
    """castqueue - scheduled Farcaster casts for race events"""
    setup_logging(verbose)
    ctx.obj = Storage(db_file)


# ---------------- Scheduler ----------------
@cli.command()
@click.option("--limit", default=None, type=int, help="Max jobs to dispatch (uses config if not set)")
@click.pass_obj
def run(db, limit):
    """Run one scheduler cycle: ensure jobs, then dispatch due ones"""
    _echo_json(run_cycle(db, limit=limit))


@cli.command()
@click.option("--poll-interval", default=None, type=float, help="Seconds between cycles (uses config if not set)")
@click.pass_obj
def worker(db, poll_interval):
    """Run scheduler cycles in the background until Ctrl+C"""
    from worker import Worker

    settings = Settings.from_storage(db)
    if poll_interval is None:
        poll_interval = settings.poll_interval

    stop_event = threading.Event()
    w = Worker(db, JobStore.from_settings(db, settings), CastClient(timeout=settings.request_timeout),
               poll_interval=poll_interval, stop_event=stop_event)
    t = threading.Thread(target=w.run, kwargs={"cycle": lambda: run_cycle(db, settings=settings, worker=w)},
                         name="castqueue-worker", daemon=True)
    click.echo(f"🚀 Starting {w.worker_id} (poll={poll_interval}s)")
    t.start()
    click.echo("Press Ctrl+C to stop.")

    try:
        while t.is_alive():
            time.sleep(0.5)
    except KeyboardInterrupt:
        click.echo("\n🛑 Stopping worker ...")
        stop_event.set()
        t.join(timeout=5.0)
        click.echo("✅ Worker stopped cleanly.")


# ---------------- Inspection ----------------
@cli.command(name="list")
@click.option("--status", default=None, type=click.Choice(JOB_STATUSES), help="Filter by status")
@click.option("--upcoming", is_flag=True, help="Only jobs scheduled in the last 24h or later")
@click.option("--limit", default=50, type=int)
@click.pass_obj
def list_jobs(db, status, upcoming, limit):
    """List cast jobs by scheduled time"""
    jobs = _store(db).list_jobs(status=status, upcoming=upcoming, limit=limit)
    if not jobs:
        click.echo("No jobs found.")
        return
    for job in jobs:
        error = f" | error={job.last_error}" if job.last_error else ""
        click.echo(f"{job.id} | {job.template} | status={job.status} | attempts={job.attempt_count} "
                   f"| scheduled_for={job.scheduled_for}{error}")


@cli.command()
@click.pass_obj
def status(db):
    """Show summary of job statuses"""
    counts = _store(db).status_counts()
    if not counts:
        click.echo("No jobs in the system yet.")
        return
    click.echo("📊 Job Status Summary:")
    for name in JOB_STATUSES:
        if name in counts:
            click.echo(f"  {name}: {counts[name]}")


@cli.command()
@click.argument("job_id")
@click.pass_obj
def show(db, job_id):
    """Show details of a single job"""
    job = _store(db).get(job_id)
    if not job:
        click.echo(f"❌ Job {job_id} not found.")
        return
    _echo_json(job.to_dict())


@cli.command()
@click.argument("job_id")
@click.pass_obj
def requeue(db, job_id):
    """Move a failed job back to pending with a fresh attempt budget"""
    job = _store(db).requeue(job_id)
    if not job:
        click.echo(f"❌ Job {job_id} is not a failed job.")
        return
    click.echo(f"♻️ Job {job_id} moved back to pending.")


# ---------------- Config management ----------------
@cli.group()
def config():
    """Scheduler tunables stored in the database"""
    pass


@config.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_obj
def config_set(db, key, value):
    """Set a config key to a value"""
    db.set_config(key, value)
    click.echo(f"🛠️ Config '{key}' set to '{value}'.")


@config.command("get")
@click.argument("key")
@click.option("--default", default=None, help="Fallback if key not set")
@click.pass_obj
def config_get(db, key, default):
    """Get a config key"""
    value = db.get_config(key)
    if value is None:
        click.echo(f"{key}={default} (default)" if default is not None else f"{key} not set")
        return
    click.echo(f"{key}={value}")


@config.command("list")
@click.pass_obj
def config_list(db):
    """List all config keys"""
    rows = db.list_config()
    if not rows:
        click.echo("No config keys set.")
        return
    for row in rows:
        click.echo(f"{row['key']}={row['value']} (updated_at={row['updated_at']})")


# ---------------- Admin actions ----------------
def _dry_run(dry_run, live):
    """None defers to the environment flag."""
    if dry_run:
        return True
    return False if live else None


def _run_action(fn, action, params):
    try:
        _echo_json(fn(action, params))
    except CastQueueError as e:
        raise click.ClickException(str(e))


@cli.command()
@click.argument("action", type=click.Choice(
    ["manual-cast", "race-lock-reminder", "driver-of-day-summary", "race-results-summary",
     "perfect-slate-alert", "close-calls", "leaderboard-update", "prediction-consensus"]))
@click.option("--race-id", default=None)
@click.option("--text", default=None, help="Cast text for manual-cast")
@click.option("--embed-url", default=None)
@click.option("--channel-id", default=None)
@click.option("--category", default=None, type=click.Choice(["pole", "winner"]))
@click.option("--dry-run", is_flag=True, help="Echo the request instead of sending it")
@click.option("--live", is_flag=True, help="Send even when FARCASTER_DRY_RUN is set")
@click.pass_obj
def cast(db, action, race_id, text, embed_url, channel_id, category, dry_run, live):
    """Build and send a cast right now"""
    params = {"raceId": race_id, "text": text, "embedUrl": embed_url,
              "channelId": channel_id, "category": category}
    actions = AdminActions(db, cast_client=CastClient(dry_run=_dry_run(dry_run, live)))
    _run_action(actions.run_cast_action, action, params)


@cli.command("delete-cast")
@click.argument("target_hash")
@click.option("--dry-run", is_flag=True)
@click.option("--live", is_flag=True)
@click.pass_obj
def delete_cast(db, target_hash, dry_run, live):
    """Delete a published cast by hash"""
    actions = AdminActions(db, cast_client=CastClient(dry_run=_dry_run(dry_run, live)))
    _run_action(actions.run_cast_action, "delete-cast", {"targetHash": target_hash})


@cli.command()
@click.argument("action", type=click.Choice(["manual-notification", "race-lock-reminder", "race-results-broadcast"]))
@click.option("--title", default=None)
@click.option("--body", default=None)
@click.option("--target-url", default=None)
@click.option("--fid", "fids", multiple=True, type=int, help="Target fid (repeatable); all users when omitted")
@click.option("--campaign-id", default=None)
@click.option("--race-id", default=None)
@click.option("--dry-run", is_flag=True)
@click.option("--live", is_flag=True)
@click.pass_obj
def notify(db, action, title, body, target_url, fids, campaign_id, race_id, dry_run, live):
    """Publish a mini app notification"""
    params = {"title": title, "body": body, "targetUrl": target_url, "targetFids": list(fids),
              "campaignId": campaign_id, "raceId": race_id}
    actions = AdminActions(db, notification_client=NotificationClient(dry_run=_dry_run(dry_run, live)))
    _run_action(actions.run_notification_action, action, params)


# ---------------- Race data ----------------
@cli.group()
def race():
    """Seed race, driver and vote data"""
    pass


def _iso_option(value, name):
    try:
        parsed = parse_iso(value)
    except ValueError:
        raise click.BadParameter(f"not an ISO timestamp: {value}", param_hint=name)
    return to_iso(parsed) if parsed else None


@race.command("add")
@click.argument("race_id")
@click.option("--name", required=True)
@click.option("--lock-time", required=True, help="ISO timestamp, UTC if no offset")
@click.option("--race-date", default=None)
@click.option("--status", "race_status", default="upcoming", type=click.Choice(["upcoming", "locked", "completed"]))
@click.option("--circuit", default=None)
@click.option("--season", default=None, type=int)
@click.option("--round", "round_", default=None, type=int)
@click.pass_obj
def race_add(db, race_id, name, lock_time, race_date, race_status, circuit, season, round_):
    """Add or update a race"""
    db.upsert_race(Race(
        id=race_id,
        name=name,
        lock_time=_iso_option(lock_time, "--lock-time"),
        status=race_status,
        circuit=circuit,
        race_date=_iso_option(race_date, "--race-date"),
        season=season,
        round=round_,
    ))
    click.echo(f"✅ Race {race_id} saved ({race_status}).")


@race.command("driver")
@click.argument("driver_id")
@click.argument("name")
@click.option("--team", default=None)
@click.option("--number", default=None, type=int)
@click.pass_obj
def race_driver(db, driver_id, name, team, number):
    """Add or update a driver"""
    db.add_driver(driver_id, name, team=team, number=number)
    click.echo(f"✅ Driver {driver_id} saved.")


@race.command("vote")
@click.argument("race_id")
@click.argument("user_id")
@click.argument("driver_id")
@click.pass_obj
def race_vote(db, race_id, user_id, driver_id):
    """Record a Driver of the Day vote"""
    db.add_dotd_vote(race_id, user_id, driver_id)
    click.echo(f"🗳️ Vote recorded for {driver_id} in {race_id}.")


# ---------------- Entrypoint ----------------
if __name__ == "__main__":
    cli()
