"""SQLite storage for DVR jobs, recordings and stream history."""

from __future__ import annotations

from dataclasses import dataclass, fields
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import logging
import sqlite3
import threading


log = logging.getLogger(__name__)

JOB_STATUSES = ("scheduled", "recording", "completed", "error", "cancelled")
TERMINAL_STATUSES = ("completed", "error", "cancelled")


# =============================================================================
# Data Types
# =============================================================================


@dataclass(slots=True)
class DvrJob:
    user_id: int
    channel_id: str
    channel_name: str
    program_title: str
    start_time: datetime
    end_time: datetime
    status: str = "scheduled"
    profile_id: str | None = None
    user_agent_id: str | None = None
    pre_buffer_minutes: int = 0
    post_buffer_minutes: int = 0
    ffmpeg_pid: int | None = None
    file_path: str | None = None
    error_message: str | None = None
    id: int | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        d = {f.name: getattr(self, f.name) for f in fields(self)}
        d["start_time"] = to_iso(self.start_time)
        d["end_time"] = to_iso(self.end_time)
        return d


@dataclass(slots=True)
class DvrRecording:
    user_id: int
    channel_name: str
    program_title: str
    start_time: datetime
    duration_seconds: int
    file_size_bytes: int
    file_path: str
    job_id: int | None = None
    id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        d = {f.name: getattr(self, f.name) for f in fields(self)}
        d["start_time"] = to_iso(self.start_time)
        d["filename"] = Path(self.file_path).name
        return d


def to_iso(dt: datetime) -> str:
    """UTC ISO-8601, fixed format so text comparison orders correctly."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def from_iso(s: str) -> datetime:
    dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


# =============================================================================
# SQLite Storage
# =============================================================================

_DB_PATH: Path | None = None
_local = threading.local()


def init(data_dir: Path) -> None:
    """Initialize the database."""
    global _DB_PATH
    data_dir.mkdir(parents=True, exist_ok=True)
    _DB_PATH = data_dir / "viniplay.db"
    close()
    conn = _get_conn()
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS dvr_jobs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            channel_id TEXT NOT NULL,
            channel_name TEXT NOT NULL,
            program_title TEXT NOT NULL,
            start_time TEXT NOT NULL,
            end_time TEXT NOT NULL,
            status TEXT NOT NULL,
            ffmpeg_pid INTEGER,
            file_path TEXT,
            profile_id TEXT,
            user_agent_id TEXT,
            pre_buffer_minutes INTEGER,
            post_buffer_minutes INTEGER,
            error_message TEXT
        );
        CREATE TABLE IF NOT EXISTS dvr_recordings (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            job_id INTEGER,
            user_id INTEGER NOT NULL,
            channel_name TEXT NOT NULL,
            program_title TEXT NOT NULL,
            start_time TEXT NOT NULL,
            duration_seconds INTEGER,
            file_size_bytes INTEGER,
            file_path TEXT UNIQUE NOT NULL,
            FOREIGN KEY (job_id) REFERENCES dvr_jobs(id) ON DELETE SET NULL
        );
        CREATE TABLE IF NOT EXISTS stream_history (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER,
            username TEXT,
            channel_id TEXT,
            channel_name TEXT,
            channel_logo TEXT,
            stream_profile_name TEXT,
            client_ip TEXT,
            start_time TEXT NOT NULL,
            end_time TEXT,
            duration_seconds INTEGER,
            status TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_dvr_jobs_user_status ON dvr_jobs(user_id, status);
        CREATE INDEX IF NOT EXISTS idx_dvr_recordings_user_start
            ON dvr_recordings(user_id, start_time);
    """)
    conn.commit()


def _get_conn() -> sqlite3.Connection:
    """Get thread-local database connection."""
    if not hasattr(_local, "conn") or _local.conn is None:
        if _DB_PATH is None:
            raise RuntimeError("Database not initialized")
        _local.conn = sqlite3.connect(_DB_PATH, timeout=30.0)
        _local.conn.row_factory = sqlite3.Row
        _local.conn.execute("PRAGMA journal_mode=WAL")
        _local.conn.execute("PRAGMA foreign_keys=ON")
    return _local.conn


def close() -> None:
    """Close this thread's connection."""
    conn = getattr(_local, "conn", None)
    if conn is not None:
        conn.close()
        _local.conn = None


# =============================================================================
# Jobs
# =============================================================================


def _row_to_job(row: sqlite3.Row) -> DvrJob:
    return DvrJob(
        id=row["id"],
        user_id=row["user_id"],
        channel_id=row["channel_id"],
        channel_name=row["channel_name"],
        program_title=row["program_title"],
        start_time=from_iso(row["start_time"]),
        end_time=from_iso(row["end_time"]),
        status=row["status"],
        profile_id=row["profile_id"],
        user_agent_id=row["user_agent_id"],
        pre_buffer_minutes=row["pre_buffer_minutes"] or 0,
        post_buffer_minutes=row["post_buffer_minutes"] or 0,
        ffmpeg_pid=row["ffmpeg_pid"],
        file_path=row["file_path"],
        error_message=row["error_message"],
    )


def insert_job(job: DvrJob) -> int:
    """Insert a job and return its id (also set on job)."""
    conn = _get_conn()
    cur = conn.execute(
        """INSERT INTO dvr_jobs (user_id, channel_id, channel_name, program_title, start_time,
               end_time, status, profile_id, user_agent_id, pre_buffer_minutes, post_buffer_minutes)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            job.user_id,
            job.channel_id,
            job.channel_name,
            job.program_title,
            to_iso(job.start_time),
            to_iso(job.end_time),
            job.status,
            job.profile_id,
            job.user_agent_id,
            job.pre_buffer_minutes,
            job.post_buffer_minutes,
        ),
    )
    conn.commit()
    job.id = cur.lastrowid
    return job.id


def get_job(job_id: int, user_id: int | None = None) -> DvrJob | None:
    """Get a job, optionally restricted to its owner."""
    conn = _get_conn()
    if user_id is None:
        row = conn.execute("SELECT * FROM dvr_jobs WHERE id = ?", (job_id,)).fetchone()
    else:
        row = conn.execute(
            "SELECT * FROM dvr_jobs WHERE id = ? AND user_id = ?", (job_id, user_id)
        ).fetchone()
    return _row_to_job(row) if row else None


def list_jobs(user_id: int | None = None, status: str | None = None) -> list[DvrJob]:
    """List jobs, newest start first."""
    clauses, params = [], []
    if user_id is not None:
        clauses.append("user_id = ?")
        params.append(user_id)
    if status is not None:
        clauses.append("status = ?")
        params.append(status)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    rows = _get_conn().execute(
        f"SELECT * FROM dvr_jobs {where} ORDER BY start_time DESC", params
    ).fetchall()
    return [_row_to_job(r) for r in rows]


_JOB_COLUMNS = {
    "status",
    "ffmpeg_pid",
    "file_path",
    "error_message",
    "start_time",
    "end_time",
}


def update_job(job_id: int, only_if_status: tuple[str, ...] | None = None, **values: Any) -> bool:
    """Update job columns. Returns False if no row matched.

    only_if_status guards state transitions: the row is only touched while
    its current status is one of those given.
    """
    unknown = set(values) - _JOB_COLUMNS
    if unknown:
        raise ValueError(f"Unknown job columns: {sorted(unknown)}")
    for key in ("start_time", "end_time"):
        if isinstance(values.get(key), datetime):
            values[key] = to_iso(values[key])
    assignments = ", ".join(f"{k} = ?" for k in values)
    params: list[Any] = [*values.values(), job_id]
    sql = f"UPDATE dvr_jobs SET {assignments} WHERE id = ?"
    if only_if_status:
        sql += f" AND status IN ({', '.join('?' for _ in only_if_status)})"
        params.extend(only_if_status)
    conn = _get_conn()
    cur = conn.execute(sql, params)
    conn.commit()
    return cur.rowcount > 0


def fail_stale_recording_jobs(message: str) -> int:
    """Mark every 'recording' job as error. Returns count."""
    conn = _get_conn()
    cur = conn.execute(
        "UPDATE dvr_jobs SET status = 'error', ffmpeg_pid = NULL, error_message = ? "
        "WHERE status = 'recording'",
        (message,),
    )
    conn.commit()
    return cur.rowcount


def delete_job(job_id: int) -> bool:
    conn = _get_conn()
    cur = conn.execute("DELETE FROM dvr_jobs WHERE id = ?", (job_id,))
    conn.commit()
    return cur.rowcount > 0


def delete_jobs_for_user(user_id: int) -> int:
    conn = _get_conn()
    cur = conn.execute("DELETE FROM dvr_jobs WHERE user_id = ?", (user_id,))
    conn.commit()
    return cur.rowcount


# =============================================================================
# Recordings
# =============================================================================


def _row_to_recording(row: sqlite3.Row) -> DvrRecording:
    return DvrRecording(
        id=row["id"],
        job_id=row["job_id"],
        user_id=row["user_id"],
        channel_name=row["channel_name"],
        program_title=row["program_title"],
        start_time=from_iso(row["start_time"]),
        duration_seconds=row["duration_seconds"] or 0,
        file_size_bytes=row["file_size_bytes"] or 0,
        file_path=row["file_path"],
    )


def insert_recording(rec: DvrRecording) -> int:
    conn = _get_conn()
    cur = conn.execute(
        """INSERT INTO dvr_recordings (job_id, user_id, channel_name, program_title, start_time,
               duration_seconds, file_size_bytes, file_path)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            rec.job_id,
            rec.user_id,
            rec.channel_name,
            rec.program_title,
            to_iso(rec.start_time),
            rec.duration_seconds,
            rec.file_size_bytes,
            rec.file_path,
        ),
    )
    conn.commit()
    rec.id = cur.lastrowid
    return rec.id


def get_recording(recording_id: int, user_id: int | None = None) -> DvrRecording | None:
    conn = _get_conn()
    if user_id is None:
        row = conn.execute("SELECT * FROM dvr_recordings WHERE id = ?", (recording_id,)).fetchone()
    else:
        row = conn.execute(
            "SELECT * FROM dvr_recordings WHERE id = ? AND user_id = ?", (recording_id, user_id)
        ).fetchone()
    return _row_to_recording(row) if row else None


def list_recordings(user_id: int | None = None) -> list[DvrRecording]:
    conn = _get_conn()
    if user_id is None:
        rows = conn.execute("SELECT * FROM dvr_recordings ORDER BY start_time DESC").fetchall()
    else:
        rows = conn.execute(
            "SELECT * FROM dvr_recordings WHERE user_id = ? ORDER BY start_time DESC", (user_id,)
        ).fetchall()
    return [_row_to_recording(r) for r in rows]


def recordings_started_before(user_id: int, cutoff: datetime) -> list[DvrRecording]:
    rows = (
        _get_conn()
        .execute(
            "SELECT * FROM dvr_recordings WHERE user_id = ? AND start_time < ?",
            (user_id, to_iso(cutoff)),
        )
        .fetchall()
    )
    return [_row_to_recording(r) for r in rows]


def recording_user_ids() -> list[int]:
    rows = _get_conn().execute("SELECT DISTINCT user_id FROM dvr_recordings").fetchall()
    return [r["user_id"] for r in rows]


def delete_recording(recording_id: int) -> bool:
    conn = _get_conn()
    cur = conn.execute("DELETE FROM dvr_recordings WHERE id = ?", (recording_id,))
    conn.commit()
    return cur.rowcount > 0


def delete_recordings_for_user(user_id: int) -> int:
    conn = _get_conn()
    cur = conn.execute("DELETE FROM dvr_recordings WHERE user_id = ?", (user_id,))
    conn.commit()
    return cur.rowcount


# =============================================================================
# Stream History
# =============================================================================


def insert_history(
    user_id: int | None,
    username: str,
    channel_id: str | None,
    channel_name: str,
    channel_logo: str | None,
    stream_profile_name: str,
    client_ip: str | None,
    start_time: datetime,
) -> int:
    conn = _get_conn()
    cur = conn.execute(
        """INSERT INTO stream_history (user_id, username, channel_id, channel_name, channel_logo,
               stream_profile_name, client_ip, start_time, status)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'playing')""",
        (
            user_id,
            username,
            channel_id,
            channel_name,
            channel_logo,
            stream_profile_name,
            client_ip,
            to_iso(start_time),
        ),
    )
    conn.commit()
    return cur.lastrowid


def finish_history(history_id: int, end_time: datetime, duration_seconds: int) -> bool:
    """Close a 'playing' history row. No-op if already stopped."""
    conn = _get_conn()
    cur = conn.execute(
        "UPDATE stream_history SET end_time = ?, duration_seconds = ?, status = 'stopped' "
        "WHERE id = ? AND status = 'playing'",
        (to_iso(end_time), duration_seconds, history_id),
    )
    conn.commit()
    return cur.rowcount > 0


def get_history(history_id: int) -> dict[str, Any] | None:
    row = _get_conn().execute("SELECT * FROM stream_history WHERE id = ?", (history_id,)).fetchone()
    return dict(row) if row else None


def list_history(limit: int = 100, offset: int = 0) -> list[dict[str, Any]]:
    rows = (
        _get_conn()
        .execute(
            "SELECT * FROM stream_history ORDER BY start_time DESC LIMIT ? OFFSET ?",
            (limit, offset),
        )
        .fetchall()
    )
    return [dict(r) for r in rows]
