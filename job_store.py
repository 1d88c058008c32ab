# job_store.py
import json
import logging
import sqlite3
import uuid
from datetime import timedelta

from errors import ConflictError
from models import (
    COMPLETED, FAILED, PENDING, PROCESSING, CastJob, to_iso, utc_now,
)
from settings import BACKOFF_BASE_MINUTES, MAX_ATTEMPTS

logger = logging.getLogger(__name__)

# Columns a caller may patch through update_by_id
UPDATABLE = {
    "status", "scheduled_for", "trigger_at", "attempt_count", "last_attempt_at", "completed_at",
    "channel_id", "last_error", "response_body",
}


def backoff_delay(attempt_count, max_attempts=MAX_ATTEMPTS, base_minutes=BACKOFF_BASE_MINUTES):
    """5m, 10m, 20m, 40m ... doubling per attempt, capped at max_attempts."""
    capped = max(1, min(attempt_count, max_attempts))
    return timedelta(minutes=base_minutes * 2 ** (capped - 1))


def _job_from_row(row):
    return CastJob(
        id=row["id"],
        template=row["template"],
        payload_args=json.loads(row["payload_args"] or "{}"),
        job_key=row["job_key"],
        status=row["status"],
        scheduled_for=row["scheduled_for"],
        trigger_at=row["trigger_at"],
        attempt_count=row["attempt_count"] or 0,
        last_attempt_at=row["last_attempt_at"],
        completed_at=row["completed_at"],
        channel_id=row["channel_id"],
        last_error=row["last_error"],
        response_body=json.loads(row["response_body"]) if row["response_body"] else None,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _log_transition(job_id, old_state, new_state, extra="", level=logging.INFO):
    logger.log(level, "Job %s: %s -> %s %s", job_id, old_state, new_state, extra)


class JobStore:
    """Durable cast_jobs table. Every call goes to the database; nothing is cached."""

    def __init__(self, db, max_attempts=MAX_ATTEMPTS, backoff_base_minutes=BACKOFF_BASE_MINUTES, clock=utc_now):
        self.db = db
        self.max_attempts = max_attempts
        self.backoff_base_minutes = backoff_base_minutes
        self.clock = clock

    @classmethod
    def from_settings(cls, db, settings, clock=utc_now):
        return cls(db, max_attempts=settings.max_attempts,
                   backoff_base_minutes=settings.backoff_base_minutes, clock=clock)

    def _now_iso(self):
        return to_iso(self.clock())

    def get(self, job_id):
        cur = self.db.conn.cursor()
        cur.execute("SELECT * FROM cast_jobs WHERE id=?", (job_id,))
        row = cur.fetchone()
        return _job_from_row(row) if row else None

    def find_by_key(self, job_key, status=None):
        cur = self.db.conn.cursor()
        if status:
            cur.execute("SELECT * FROM cast_jobs WHERE job_key=? AND status=?", (job_key, status))
        else:
            cur.execute("SELECT * FROM cast_jobs WHERE job_key=?", (job_key,))
        row = cur.fetchone()
        return _job_from_row(row) if row else None

    def insert(self, template, payload_args, job_key, scheduled_for, channel_id=None, trigger_at=None):
        job_id = str(uuid.uuid4())
        now = self._now_iso()
        try:
            self.db.conn.execute("""
                INSERT INTO cast_jobs (id, template, payload_args, job_key, status, scheduled_for, trigger_at,
                                       attempt_count, channel_id, created_at, updated_at)
                VALUES (?, ?, ?, ?, 'pending', ?, ?, 0, ?, ?, ?)
            """, (job_id, template, json.dumps(payload_args, sort_keys=True), job_key,
                  scheduled_for, trigger_at or scheduled_for, channel_id, now, now))
            self.db.conn.commit()
        except sqlite3.IntegrityError as e:
            self.db.conn.rollback()
            raise ConflictError(f"Cast job with key {job_key} already exists") from e
        logger.info("Job %s created (%s, scheduled_for=%s)", job_id, job_key, scheduled_for)
        return self.get(job_id)

    def update_by_id(self, job_id, patch, expected_status=None):
        """Partial update. Returns None when the row is gone or no longer has `expected_status`."""
        unknown = set(patch) - UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update cast job columns: {', '.join(sorted(unknown))}")
        values = dict(patch)
        if "response_body" in values and values["response_body"] is not None:
            values["response_body"] = json.dumps(values["response_body"])
        values["updated_at"] = self._now_iso()

        assignments = ", ".join(f"{col}=?" for col in values)
        sql = f"UPDATE cast_jobs SET {assignments} WHERE id=?"
        params = [*values.values(), job_id]
        if expected_status:
            sql += " AND status=?"
            params.append(expected_status)

        updated = self.db.conn.execute(sql, params).rowcount
        self.db.conn.commit()
        if updated != 1:
            return None
        return self.get(job_id)

    def fetch_due(self, now, limit):
        cur = self.db.conn.cursor()
        cur.execute("""
            SELECT * FROM cast_jobs
            WHERE status='pending' AND scheduled_for <= ?
            ORDER BY scheduled_for ASC
            LIMIT ?
        """, (to_iso(now), limit))
        return [_job_from_row(row) for row in cur.fetchall()]

    def claim(self, job):
        """
        Atomically move a job pending -> processing.
        Returns None if another caller got there first.
        """
        now_iso = self._now_iso()
        updated = self.db.conn.execute("""
            UPDATE cast_jobs
            SET status='processing', attempt_count=attempt_count + 1,
                last_attempt_at=?, updated_at=?
            WHERE id=? AND status='pending'
        """, (now_iso, now_iso, job.id)).rowcount
        self.db.conn.commit()

        if updated != 1:
            return None  # lost the race to another invocation

        claimed = self.get(job.id)
        _log_transition(job.id, PENDING, PROCESSING, f"(attempt {claimed.attempt_count})")
        return claimed

    def mark_completed(self, job_id, response):
        now_iso = self._now_iso()
        self.db.conn.execute("""
            UPDATE cast_jobs
            SET status='completed', completed_at=?, response_body=?, last_error=NULL, updated_at=?
            WHERE id=?
        """, (now_iso, json.dumps(response) if response is not None else None, now_iso, job_id))
        self.db.conn.commit()
        _log_transition(job_id, PROCESSING, COMPLETED)

    def mark_failure(self, job, message):
        """Back to pending with backoff while attempts remain, otherwise terminal failed."""
        now = self.clock()
        if job.attempt_count < self.max_attempts:
            delay = backoff_delay(job.attempt_count, self.max_attempts, self.backoff_base_minutes)
            self.db.conn.execute("""
                UPDATE cast_jobs
                SET status='pending', scheduled_for=?, last_error=?, updated_at=?
                WHERE id=?
            """, (to_iso(now + delay), message, to_iso(now), job.id))
            self.db.conn.commit()
            _log_transition(job.id, PROCESSING, PENDING,
                            f"(attempt {job.attempt_count}, retry_in={delay}, error={message})",
                            level=logging.WARNING)
        else:
            self.db.conn.execute("""
                UPDATE cast_jobs SET status='failed', last_error=?, updated_at=? WHERE id=?
            """, (message, to_iso(now), job.id))
            self.db.conn.commit()
            _log_transition(job.id, PROCESSING, FAILED,
                            f"(attempts={job.attempt_count}, error={message})",
                            level=logging.WARNING)

    # ---------------- Inspection ----------------
    def list_jobs(self, status=None, upcoming=False, limit=50):
        try:
            limit = int(limit)
        except (TypeError, ValueError):
            limit = 50
        if limit <= 0 or limit > 200:
            limit = 50

        clauses, params = [], []
        if status:
            clauses.append("status=?")
            params.append(status)
        if upcoming:
            clauses.append("scheduled_for >= ?")
            params.append(to_iso(self.clock() - timedelta(hours=24)))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        cur = self.db.conn.cursor()
        cur.execute(f"SELECT * FROM cast_jobs {where} ORDER BY scheduled_for ASC LIMIT ?", (*params, limit))
        return [_job_from_row(row) for row in cur.fetchall()]

    def status_counts(self):
        cur = self.db.conn.cursor()
        cur.execute("SELECT status, COUNT(*) AS count FROM cast_jobs GROUP BY status")
        return {row["status"]: row["count"] for row in cur.fetchall()}

    def requeue(self, job_id):
        """Operator retry: failed -> pending with a fresh attempt budget."""
        job = self.update_by_id(job_id, {
            "status": PENDING,
            "attempt_count": 0,
            "last_error": None,
            "scheduled_for": self._now_iso(),
        }, expected_status=FAILED)
        if job:
            _log_transition(job_id, FAILED, PENDING, "(requeued)")
        return job
