# storage.py
import sqlite3

from models import Race, parse_iso, to_iso, utc_now
from settings import db_path as default_db_path

PREDICTION_FIELDS = (
    "pole_driver_id", "winner_driver_id", "second_driver_id", "third_driver_id",
    "fastest_lap_driver_id", "fastest_pit_team_id", "first_dnf_driver_id",
    "no_dnf", "safety_car", "winning_margin",
)


def _race_from_row(row):
    return Race(
        id=row["id"],
        name=row["name"],
        lock_time=row["lock_time"],
        status=row["status"],
        circuit=row["circuit"],
        race_date=row["race_date"],
        season=row["season"],
        round=row["round"],
    )


class Storage:
    def __init__(self, db_path=None):
        self.db_path = db_path or default_db_path()
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row

        # Better concurrency for overlapping scheduler runs
        self.conn.execute("PRAGMA journal_mode=WAL;")
        self.conn.execute("PRAGMA synchronous=NORMAL;")
        self.conn.execute("PRAGMA busy_timeout=5000;")

        self._init_schema()

    def close(self):
        self.conn.close()

    def _init_schema(self):
        # Scheduled casts
        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS cast_jobs (
            id TEXT PRIMARY KEY,
            template TEXT NOT NULL,
            payload_args TEXT NOT NULL,
            job_key TEXT,
            status TEXT NOT NULL DEFAULT 'pending',
            scheduled_for TEXT NOT NULL,
            trigger_at TEXT,
            attempt_count INTEGER NOT NULL DEFAULT 0,
            last_attempt_at TEXT,
            completed_at TEXT,
            channel_id TEXT,
            last_error TEXT,
            response_body TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """)
        self.conn.execute(
            "CREATE UNIQUE INDEX IF NOT EXISTS cast_jobs_job_key ON cast_jobs (job_key)"
        )
        self.conn.execute(
            "CREATE INDEX IF NOT EXISTS cast_jobs_due ON cast_jobs (status, scheduled_for)"
        )

        # Config table
        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS config (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """)

        # Reference data owned by the prediction game
        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS races (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            circuit TEXT,
            race_date TEXT,
            lock_time TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'upcoming',
            season INTEGER,
            round INTEGER
        )
        """)
        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS drivers (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            team TEXT,
            number TEXT
        )
        """)
        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS dotd_votes (
            race_id TEXT NOT NULL,
            user_id TEXT NOT NULL,
            driver_id TEXT NOT NULL,
            PRIMARY KEY (race_id, user_id)
        )
        """)
        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS users (
            id TEXT PRIMARY KEY,
            fid INTEGER,
            username TEXT,
            display_name TEXT,
            total_points INTEGER NOT NULL DEFAULT 0
        )
        """)
        columns = ",\n".join(f"{name} {'INTEGER' if name in ('no_dnf', 'safety_car') else 'TEXT'}" for name in PREDICTION_FIELDS)
        self.conn.execute(f"""
        CREATE TABLE IF NOT EXISTS predictions (
            race_id TEXT NOT NULL,
            user_id TEXT NOT NULL,
            {columns},
            score INTEGER,
            PRIMARY KEY (race_id, user_id)
        )
        """)
        self.conn.execute(f"""
        CREATE TABLE IF NOT EXISTS race_results (
            race_id TEXT PRIMARY KEY,
            {columns}
        )
        """)

        self.conn.commit()

    # ---------------- Config helpers ----------------
    def get_config(self, key, default=None):
        cur = self.conn.cursor()
        cur.execute("SELECT value FROM config WHERE key=?", (key,))
        row = cur.fetchone()
        return row["value"] if row else default

    def set_config(self, key, value):
        now = to_iso(utc_now())
        self.conn.execute("""
            INSERT INTO config (key, value, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
        """, (key, str(value), now))
        self.conn.commit()

    def list_config(self):
        cur = self.conn.cursor()
        cur.execute("SELECT key, value, updated_at FROM config ORDER BY key")
        return [dict(row) for row in cur.fetchall()]

    # ---------------- Races ----------------
    def get_race(self, race_id):
        cur = self.conn.cursor()
        cur.execute("SELECT * FROM races WHERE id=?", (race_id,))
        row = cur.fetchone()
        return _race_from_row(row) if row else None

    def races_locking_after(self, since_iso, limit):
        """Upcoming/locked races whose lock time is at or after `since_iso`."""
        cur = self.conn.cursor()
        cur.execute("""
            SELECT * FROM races
            WHERE status IN ('upcoming', 'locked') AND lock_time >= ?
            ORDER BY lock_time ASC
            LIMIT ?
        """, (since_iso, limit))
        return [_race_from_row(row) for row in cur.fetchall()]

    def completed_races(self, limit):
        cur = self.conn.cursor()
        cur.execute("""
            SELECT * FROM races WHERE status='completed'
            ORDER BY race_date DESC
            LIMIT ?
        """, (limit,))
        return [_race_from_row(row) for row in cur.fetchall()]

    def latest_completed_race(self):
        races = self.completed_races(1)
        return races[0] if races else None

    def next_prediction_race(self, now_iso):
        races = self.races_locking_after(now_iso, 1)
        return races[0] if races else None

    def upsert_race(self, race):
        # Normalised so lock_time range scans compare correctly as text
        lock_time = to_iso(parse_iso(race.lock_time))
        race_date = to_iso(parse_iso(race.race_date)) if race.race_date else None
        self.conn.execute("""
            INSERT INTO races (id, name, circuit, race_date, lock_time, status, season, round)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name=excluded.name, circuit=excluded.circuit, race_date=excluded.race_date,
                lock_time=excluded.lock_time, status=excluded.status,
                season=excluded.season, round=excluded.round
        """, (race.id, race.name, race.circuit, race_date, lock_time,
              race.status, race.season, race.round))
        self.conn.commit()

    # ---------------- Drivers & votes ----------------
    def add_driver(self, driver_id, name, team=None, number=None):
        self.conn.execute("""
            INSERT INTO drivers (id, name, team, number) VALUES (?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET name=excluded.name, team=excluded.team, number=excluded.number
        """, (driver_id, name, team, number))
        self.conn.commit()

    def get_drivers(self, driver_ids):
        ids = list(dict.fromkeys(driver_ids))
        if not ids:
            return {}
        cur = self.conn.cursor()
        cur.execute(
            f"SELECT id, name, team, number FROM drivers WHERE id IN ({','.join('?' for _ in ids)})",
            ids,
        )
        return {row["id"]: dict(row) for row in cur.fetchall()}

    def add_dotd_vote(self, race_id, user_id, driver_id):
        self.conn.execute("""
            INSERT INTO dotd_votes (race_id, user_id, driver_id) VALUES (?, ?, ?)
            ON CONFLICT(race_id, user_id) DO UPDATE SET driver_id=excluded.driver_id
        """, (race_id, user_id, driver_id))
        self.conn.commit()

    def dotd_votes(self, race_id):
        """One row per vote, joined with the voted driver."""
        cur = self.conn.cursor()
        cur.execute("""
            SELECT v.driver_id, d.name, d.team, d.number
            FROM dotd_votes v JOIN drivers d ON d.id = v.driver_id
            WHERE v.race_id=?
        """, (race_id,))
        return [dict(row) for row in cur.fetchall()]

    # ---------------- Predictions, results, users ----------------
    def save_prediction(self, race_id, user_id, score=None, **picks):
        fields = [name for name in PREDICTION_FIELDS if name in picks]
        cols = ", ".join(["race_id", "user_id", "score"] + fields)
        marks = ", ".join("?" for _ in range(3 + len(fields)))
        self.conn.execute(
            f"INSERT OR REPLACE INTO predictions ({cols}) VALUES ({marks})",
            (race_id, user_id, score, *[picks[name] for name in fields]),
        )
        self.conn.commit()

    def predictions(self, race_id):
        cur = self.conn.cursor()
        cur.execute("SELECT * FROM predictions WHERE race_id=?", (race_id,))
        return [dict(row) for row in cur.fetchall()]

    def top_scored_predictions(self, race_id, limit):
        cur = self.conn.cursor()
        cur.execute("""
            SELECT user_id, score FROM predictions
            WHERE race_id=? AND score IS NOT NULL
            ORDER BY score DESC, user_id ASC
            LIMIT ?
        """, (race_id, limit))
        return [dict(row) for row in cur.fetchall()]

    def set_race_result(self, race_id, **results):
        fields = [name for name in PREDICTION_FIELDS if name in results]
        cols = ", ".join(["race_id"] + fields)
        marks = ", ".join("?" for _ in range(1 + len(fields)))
        self.conn.execute(
            f"INSERT OR REPLACE INTO race_results ({cols}) VALUES ({marks})",
            (race_id, *[results[name] for name in fields]),
        )
        self.conn.commit()

    def race_result(self, race_id):
        cur = self.conn.cursor()
        cur.execute("SELECT * FROM race_results WHERE race_id=?", (race_id,))
        row = cur.fetchone()
        return dict(row) if row else None

    def add_user(self, user_id, fid=None, username=None, display_name=None, total_points=0):
        self.conn.execute("""
            INSERT OR REPLACE INTO users (id, fid, username, display_name, total_points)
            VALUES (?, ?, ?, ?, ?)
        """, (user_id, fid, username, display_name, total_points))
        self.conn.commit()

    def get_users(self, user_ids):
        ids = list(dict.fromkeys(user_ids))
        if not ids:
            return {}
        cur = self.conn.cursor()
        cur.execute(
            f"SELECT * FROM users WHERE id IN ({','.join('?' for _ in ids)})",
            ids,
        )
        return {row["id"]: dict(row) for row in cur.fetchall()}

    def top_users(self, limit):
        cur = self.conn.cursor()
        cur.execute("SELECT * FROM users ORDER BY total_points DESC LIMIT ?", (limit,))
        return [dict(row) for row in cur.fetchall()]

    def fids_without_prediction(self, race_id):
        cur = self.conn.cursor()
        cur.execute("""
            SELECT u.fid FROM users u
            WHERE u.fid > 0
              AND u.id NOT IN (SELECT user_id FROM predictions WHERE race_id=?)
            ORDER BY u.fid
        """, (race_id,))
        return [row["fid"] for row in cur.fetchall()]
