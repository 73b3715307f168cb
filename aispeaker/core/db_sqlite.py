"""
SQLite job store for AI Speaker.
Thread-safe via check_same_thread=False + explicit locking; state changes
are conditional UPDATEs so two workers can never claim the same job.
"""

import json
import sqlite3
import threading
import uuid
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path

from aispeaker.core.constants import (
    DB_PATH, JobState, JOB_TRANSITIONS, TERMINAL_JOB_STATES, JOB_STALE_AFTER_SEC,
)
from aispeaker.core.error_codes import is_retryable
from aispeaker.core.models import Job

logger = logging.getLogger(__name__)

_SCHEMA_VERSION = 2

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    video_url TEXT NOT NULL,
    video_id TEXT,
    speaker_name TEXT,
    state TEXT NOT NULL DEFAULT 'queued',
    stage TEXT,
    progress INTEGER DEFAULT 0,
    result TEXT,
    error_code TEXT,
    error_message TEXT,
    worker_id TEXT,
    created_at TEXT,
    updated_at TEXT,
    completed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_jobs_state_created ON jobs(state, created_at);
CREATE INDEX IF NOT EXISTS idx_jobs_video_id ON jobs(video_id);
"""

_UPDATABLE = {'video_id', 'speaker_name', 'stage', 'progress', 'result',
              'error_code', 'error_message'}


class Database:
    """SQLite wrapper holding the durable job records."""

    def __init__(self, db_path: Path | str | None = None):
        self.db_path = Path(db_path) if db_path else DB_PATH
        self._ensure_dirs()
        self._lock = threading.Lock()
        self.conn = sqlite3.connect(
            str(self.db_path),
            check_same_thread=False,
            timeout=30,
        )
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self._migrate()

    def _ensure_dirs(self):
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _migrate(self):
        cur = self.conn.cursor()
        cur.executescript(_CREATE_TABLES)
        columns = {row[1] for row in cur.execute("PRAGMA table_info(jobs)")}
        if 'worker_id' not in columns:
            cur.execute("ALTER TABLE jobs ADD COLUMN worker_id TEXT")
        cur.execute(
            "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
            (_SCHEMA_VERSION,),
        )
        self.conn.commit()

    def close(self):
        if self.conn:
            self.conn.close()
            self.conn = None

    # ── Helpers ───────────────────────────────────────────────────────

    @staticmethod
    def _now(offset_sec: float = 0.0) -> str:
        # fixed width so timestamps compare as text
        moment = datetime.now(timezone.utc) - timedelta(seconds=offset_sec)
        return moment.isoformat(timespec='microseconds')

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> Job:
        data = dict(row)
        if data.get('result'):
            data['result'] = json.loads(data['result'])
        return Job(**data)

    @staticmethod
    def _encode(fields: dict) -> dict:
        unknown = set(fields) - _UPDATABLE
        if unknown:
            raise ValueError(f"Not updatable job fields: {sorted(unknown)}")
        encoded = dict(fields)
        if encoded.get('result') is not None:
            encoded['result'] = json.dumps(encoded['result'])
        return encoded

    # ── Job CRUD ──────────────────────────────────────────────────────

    def create_job(self, video_url: str, video_id: str | None = None,
                   speaker_name: str | None = None) -> Job:
        now = self._now()
        job = Job(
            id=str(uuid.uuid4()),
            video_url=video_url,
            video_id=video_id,
            speaker_name=speaker_name,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self.conn.execute(
                """INSERT INTO jobs
                   (id, video_url, video_id, speaker_name, state, progress,
                    created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (job.id, job.video_url, job.video_id, job.speaker_name,
                 job.state, job.progress, job.created_at, job.updated_at),
            )
            self.conn.commit()
        return job

    def get_job(self, job_id: str) -> Job | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM jobs WHERE id = ?", (job_id,)
            ).fetchone()
        return self._row_to_job(row) if row else None

    def get_jobs_by_state(self, state: str) -> list[Job]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM jobs WHERE state = ? ORDER BY created_at ASC, rowid ASC",
                (state,),
            ).fetchall()
        return [self._row_to_job(r) for r in rows]

    # ── State machine ─────────────────────────────────────────────────

    def claim_next_job(self, worker_id: str | None = None) -> Job | None:
        """Move the oldest queued job to active for `worker_id` and return it, or None."""
        with self._lock:
            while True:
                row = self.conn.execute(
                    "SELECT id FROM jobs WHERE state = ? ORDER BY created_at ASC, rowid ASC LIMIT 1",
                    (JobState.QUEUED,),
                ).fetchone()
                if row is None:
                    return None
                cur = self.conn.execute(
                    "UPDATE jobs SET state = ?, worker_id = ?, updated_at = ? "
                    "WHERE id = ? AND state = ?",
                    (JobState.ACTIVE, worker_id, self._now(), row['id'], JobState.QUEUED),
                )
                self.conn.commit()
                if cur.rowcount == 1:
                    claimed = self.conn.execute(
                        "SELECT * FROM jobs WHERE id = ?", (row['id'],)
                    ).fetchone()
                    return self._row_to_job(claimed)
                # another process claimed it first

    def transition_job(self, job_id: str, to_state: str, **fields) -> bool:
        """
        Apply a state transition plus field updates in one statement.
        Returns False (and changes nothing) when the job is not in a state
        the transition is allowed from.
        """
        allowed = JOB_TRANSITIONS.get(to_state)
        if not allowed:
            raise ValueError(f"No transition into state {to_state!r}")

        values = self._encode(fields)
        values['state'] = to_state
        values['updated_at'] = self._now()
        if to_state in TERMINAL_JOB_STATES:
            values['completed_at'] = values['updated_at']

        sets = ', '.join(f"{k} = ?" for k in values)
        placeholders = ', '.join('?' for _ in allowed)
        params = list(values.values()) + [job_id] + [str(s) for s in allowed]
        with self._lock:
            cur = self.conn.execute(
                f"UPDATE jobs SET {sets} WHERE id = ? AND state IN ({placeholders})",
                params,
            )
            self.conn.commit()
        if cur.rowcount != 1:
            logger.warning("Rejected transition of job %s to %s", job_id, to_state)
            return False
        return True

    def update_progress(self, job_id: str, stage: str, progress: int, **fields) -> bool:
        """Record stage progress; only an active job accepts it."""
        values = self._encode(fields)
        values.update(stage=stage, progress=progress, updated_at=self._now())
        sets = ', '.join(f"{k} = ?" for k in values)
        params = list(values.values()) + [job_id, JobState.ACTIVE]
        with self._lock:
            cur = self.conn.execute(
                f"UPDATE jobs SET {sets} WHERE id = ? AND state = ?", params
            )
            self.conn.commit()
        return cur.rowcount == 1

    def heartbeat(self, job_ids) -> int:
        """Bump updated_at of the given active jobs; their worker is alive."""
        job_ids = list(job_ids)
        if not job_ids:
            return 0
        placeholders = ', '.join('?' for _ in job_ids)
        with self._lock:
            cur = self.conn.execute(
                f"UPDATE jobs SET updated_at = ? WHERE state = ? AND id IN ({placeholders})",
                [self._now(), JobState.ACTIVE] + job_ids,
            )
            self.conn.commit()
        return cur.rowcount

    def recover_stale_jobs(self, error_code: str, message: str,
                           stale_after_sec: float = JOB_STALE_AFTER_SEC) -> int:
        """
        Fail active jobs whose worker stopped touching them for
        `stale_after_sec`, e.g. one that died mid-run. Jobs a live worker
        keeps heart-beating are left alone.
        """
        now = self._now()
        cutoff = self._now(stale_after_sec)
        result = json.dumps({'error': message, 'code': error_code,
                             'retryable': is_retryable(error_code)})
        with self._lock:
            cur = self.conn.execute(
                """UPDATE jobs SET state = ?, error_code = ?, error_message = ?,
                          result = ?, updated_at = ?, completed_at = ?
                   WHERE state = ? AND updated_at < ?""",
                (JobState.FAILED, error_code, message, result, now, now,
                 JobState.ACTIVE, cutoff),
            )
            self.conn.commit()
        return cur.rowcount
