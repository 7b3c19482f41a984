"""DVR scheduling: timed recordings, conflict checks, recovery and cleanup."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from functools import partial
from pathlib import Path
from typing import Any

import logging
import os
import re
import shutil
import sqlite3
import threading

import db
import settings as settings_module
from channels import ChannelDirectory
from db import DvrJob, DvrRecording
from errors import (
    ChannelNotFound,
    ConflictError,
    FileTooSmallError,
    InvalidJobState,
    JobNotFound,
    PastScheduleError,
    ProfileNotFound,
    RecordingFileMissing,
    RecordingNotFound,
    SpawnFailed,
    UserAgentNotFound,
)
from ffmpeg_command import Profile, ProfileResolver
from ffmpeg_process import ProcessExited, ProcessRunner, RunningProcess
from timers import Scheduler


log = logging.getLogger(__name__)

MIN_RECORDING_BYTES = 1024
GRACEFUL_EXIT_CODES = (0, 255)  # 255 is ffmpeg's exit code after SIGINT
RECORDING_FILE_MODE = 0o666
AUTO_DELETE_HOUR = 2
TIMESHIFT_CONTENT_TYPE = "video/mp2t"

RESTART_MESSAGE = "Server restarted during recording."
PAST_MESSAGE = "Job was scheduled for a time in the past."
MANUAL_TITLE = "Manual Recording: {channel_name}"

_UNSAFE_FILENAME_RE = re.compile(r"[^a-z0-9]", re.IGNORECASE)


def _as_utc(dt: datetime) -> datetime:
    return dt.replace(tzinfo=UTC) if dt.tzinfo is None else dt.astimezone(UTC)


def overlaps(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    """Half-open interval overlap: touching boundaries do not overlap."""
    return a_start < b_end and a_end > b_start


def recording_filename(job: DvrJob, profile: Profile) -> str:
    """`<id>_<sanitized lowercase title><ext>`."""
    title = _UNSAFE_FILENAME_RE.sub("_", job.program_title).lower()
    return f"{job.id}_{title}{profile.file_extension}"


def is_graceful_exit(exit_: ProcessExited) -> bool:
    return exit_.code in GRACEFUL_EXIT_CODES or exit_.interrupted


def check_output_file(path: Path) -> int:
    """Size of a finished recording.

    Raises OSError if it cannot be stat'ed and FileTooSmallError if it holds
    no more than MIN_RECORDING_BYTES.
    """
    size = path.stat().st_size
    if size <= MIN_RECORDING_BYTES:
        raise FileTooSmallError(str(path), size)
    return size


@dataclass(slots=True)
class StorageUsage:
    total: int
    used: int
    percentage: int

    def to_dict(self) -> dict[str, int]:
        return {"total": self.total, "used": self.used, "percentage": self.percentage}


class DvrScheduler:
    """Owns DVR timers and the recording process table."""

    AUTO_DELETE_TIMER_KEY = "dvr-auto-delete"

    def __init__(
        self,
        resolver: ProfileResolver,
        runner: ProcessRunner,
        channels: ChannelDirectory,
        scheduler: Scheduler,
        dvr_dir: Path | None = None,
    ):
        self._resolver = resolver
        self._runner = runner
        self._channels = channels
        self._scheduler = scheduler
        self._dvr_dir = dvr_dir
        self._recordings: dict[int, RunningProcess] = {}
        self._armed: set[int] = set()
        self._lock = threading.Lock()

    @property
    def dvr_dir(self) -> Path:
        if self._dvr_dir is not None:
            return self._dvr_dir
        return Path(settings_module.get_settings().get("dvr_dir") or "/dvr")

    def now(self) -> datetime:
        return datetime.fromtimestamp(self._scheduler.now(), UTC)

    def is_recording(self, job_id: int) -> bool:
        with self._lock:
            return job_id in self._recordings

    # =========================================================================
    # Scheduling
    # =========================================================================

    def get_job(self, job_id: int, user_id: int | None = None) -> DvrJob:
        """Job by id, restricted to user_id if given. Raises JobNotFound."""
        job = db.get_job(job_id, user_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    def find_conflicts(self, job: DvrJob) -> list[DvrJob]:
        """The user's scheduled jobs overlapping job's window (excluding job itself)."""
        return [
            other
            for other in db.list_jobs(user_id=job.user_id, status="scheduled")
            if other.id != job.id
            and overlaps(job.start_time, job.end_time, other.start_time, other.end_time)
        ]

    def _check_conflicts(self, job: DvrJob) -> None:
        dvr = settings_module.get_dvr_settings(job.user_id)
        max_concurrent = int(dvr.get("max_concurrent_recordings") or 1)
        conflicts = self.find_conflicts(job)
        if conflicts and len(conflicts) >= max_concurrent:
            log.info(
                "Conflict for user %s: %d overlapping job(s), limit %d",
                job.user_id,
                len(conflicts),
                max_concurrent,
            )
            raise ConflictError(conflicts, new_job=job)

    def _create(self, job: DvrJob) -> DvrJob:
        if job.end_time <= self.now():
            raise PastScheduleError()
        self._check_conflicts(job)
        db.insert_job(job)
        log.info("Scheduled job %s: %r on %s", job.id, job.program_title, job.channel_name)
        self._arm(job)
        return job

    def schedule(
        self,
        user_id: int,
        channel_id: str,
        channel_name: str,
        program_title: str,
        program_start: datetime,
        program_stop: datetime,
    ) -> DvrJob:
        """Schedule a program recording with the user's pre/post buffers.

        Raises ConflictError or PastScheduleError.
        """
        dvr = settings_module.get_dvr_settings(user_id)
        pre = int(dvr.get("pre_buffer_minutes") or 0)
        post = int(dvr.get("post_buffer_minutes") or 0)
        job = DvrJob(
            user_id=user_id,
            channel_id=channel_id,
            channel_name=channel_name,
            program_title=program_title,
            start_time=_as_utc(program_start) - timedelta(minutes=pre),
            end_time=_as_utc(program_stop) + timedelta(minutes=post),
            profile_id=dvr.get("active_recording_profile_id"),
            user_agent_id=settings_module.get_settings().get("active_user_agent_id"),
            pre_buffer_minutes=pre,
            post_buffer_minutes=post,
        )
        return self._create(job)

    def schedule_manual(
        self,
        user_id: int,
        channel_id: str,
        channel_name: str,
        start: datetime,
        end: datetime,
    ) -> DvrJob:
        """Schedule an explicit time window, no buffers."""
        dvr = settings_module.get_dvr_settings(user_id)
        job = DvrJob(
            user_id=user_id,
            channel_id=channel_id,
            channel_name=channel_name,
            program_title=MANUAL_TITLE.format(channel_name=channel_name),
            start_time=_as_utc(start),
            end_time=_as_utc(end),
            profile_id=dvr.get("active_recording_profile_id"),
            user_agent_id=settings_module.get_settings().get("active_user_agent_id"),
        )
        return self._create(job)

    @staticmethod
    def _timer_keys(job_id: int) -> tuple[tuple[str, int], tuple[str, int]]:
        return ("dvr-start", job_id), ("dvr-stop", job_id)

    def _disarm(self, job_id: int) -> None:
        start_key, stop_key = self._timer_keys(job_id)
        self._scheduler.cancel(start_key)
        self._scheduler.cancel(stop_key)
        with self._lock:
            self._armed.discard(job_id)

    def _arm(self, job: DvrJob) -> bool:
        """Arm start/stop timers. Jobs already over are marked as errors."""
        self._disarm(job.id)
        if job.end_time <= self.now():
            log.info("Job %s for %r is already in the past, not scheduling", job.id, job.program_title)
            self._safe_update(job.id, ("scheduled",), status="error", error_message=PAST_MESSAGE)
            return False
        start_key, stop_key = self._timer_keys(job.id)
        # A start time in the past fires immediately
        self._scheduler.call_at(start_key, job.start_time, partial(self.start_recording, job.id))
        self._scheduler.call_at(stop_key, job.end_time, partial(self.stop_recording, job.id))
        with self._lock:
            self._armed.add(job.id)
        log.info("Job %s armed: start %s, stop %s", job.id, job.start_time, job.end_time)
        return True

    # =========================================================================
    # Recording
    # =========================================================================

    def _safe_update(self, job_id: int, only_if_status: tuple[str, ...] | None, **values: Any) -> bool:
        try:
            return db.update_job(job_id, only_if_status=only_if_status, **values)
        except (sqlite3.Error, RuntimeError) as e:
            log.error("Failed to update job %s: %s", job_id, e)
            return False

    def _fail(self, job: DvrJob, message: str) -> None:
        log.error("Cannot start recording job %s: %s", job.id, message)
        self._safe_update(
            job.id, ("scheduled", "recording"), status="error", ffmpeg_pid=None, error_message=message
        )

    async def start_recording(self, job_id: int) -> RunningProcess | None:
        """Resolve and spawn the recording. Failures mark the job as error, never retried."""
        try:
            job = db.get_job(job_id)
        except (sqlite3.Error, RuntimeError) as e:
            log.error("Could not load job %s: %s", job_id, e)
            return None
        if job is None or job.status != "scheduled":
            log.info("Not starting job %s (status %s)", job_id, job.status if job else "deleted")
            return None
        log.info("Starting recording for job %s: %r", job.id, job.program_title)

        try:
            channel = self._channels.resolve(job.channel_id)
            profile = self._resolver.get_profile("recording", job.profile_id)
            user_agent = self._resolver.get_user_agent(job.user_agent_id)
        except (ChannelNotFound, ProfileNotFound, UserAgentNotFound) as e:
            self._fail(job, e.detail)
            return None

        log.info("Using recording profile: %r", profile.name)
        file_path = self.dvr_dir / recording_filename(job, profile)
        cmd = self._resolver.build_recording_cmd(profile, channel.url, user_agent, str(file_path))
        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            process = await self._runner.spawn(cmd, label=f"dvr-{job.id}")
        except SpawnFailed as e:
            self._fail(job, f"Failed to spawn ffmpeg process: {e.reason}")
            return None
        except OSError as e:
            self._fail(job, f"Cannot create recording directory: {e}")
            return None

        with self._lock:
            self._recordings[job.id] = process
        process.add_exit_callback(partial(self._on_exit, job, file_path))
        if not self._safe_update(
            job.id,
            ("scheduled",),
            status="recording",
            ffmpeg_pid=process.pid,
            file_path=str(file_path),
        ):
            log.warning("Job %s changed while starting, stopping its recording", job.id)
            process.interrupt()
        return process

    def _on_exit(self, job: DvrJob, file_path: Path, exit_: ProcessExited) -> None:
        with self._lock:
            self._recordings.pop(job.id, None)
        graceful = is_graceful_exit(exit_)
        if graceful:
            log.info("Recording process for job %s (%r) finished gracefully", job.id, job.program_title)
        else:
            log.warning("Recording process for job %s exited with error code %s", job.id, exit_.code)

        if file_path.exists():
            try:
                os.chmod(file_path, RECORDING_FILE_MODE)
            except OSError as e:
                log.error("Failed to set permissions for %s: %s", file_path, e)

        size: int | None = None
        problem = ""
        try:
            size = check_output_file(file_path)
        except FileTooSmallError as e:
            problem = f"Output file too small ({e.size} bytes)."
            self._remove_file(file_path)
        except OSError as e:
            problem = f"File stat error: {e.strerror or e}."

        if graceful and size is not None:
            self._complete(job, file_path, size)
            return

        message = f"Recording failed. FFmpeg exit code: {exit_.code}. "
        if problem:
            message += problem + " "
        message += f"FFmpeg output: {exit_.stderr_tail}"
        log.error("Recording for job %s failed. %s", job.id, message)
        self._safe_update(job.id, ("recording",), status="error", ffmpeg_pid=None, error_message=message)

    def _complete(self, job: DvrJob, file_path: Path, size: int) -> None:
        job_id: int | None = job.id
        if not self._safe_update(job.id, ("recording",), status="completed", ffmpeg_pid=None):
            try:
                current = db.get_job(job.id)
            except (sqlite3.Error, RuntimeError) as e:
                log.error("Could not reload job %s after recording, keeping %s: %s", job.id, file_path, e)
                return
            if current is not None:
                log.warning("Job %s is no longer recording, discarding %s", job.id, file_path)
                self._remove_file(file_path)
                return
            # Job row was cleared while recording; keep the file
            job_id = None
        recording = DvrRecording(
            job_id=job_id,
            user_id=job.user_id,
            channel_name=job.channel_name,
            program_title=job.program_title,
            start_time=job.start_time,
            duration_seconds=round((job.end_time - job.start_time).total_seconds()),
            file_size_bytes=size,
            file_path=str(file_path),
        )
        try:
            db.insert_recording(recording)
        except (sqlite3.Error, RuntimeError) as e:
            log.error("Failed to create recording entry for job %s: %s", job.id, e)
            return
        log.info("Job %s logged to completed recordings (%d bytes)", job.id, size)

    @staticmethod
    def _remove_file(path: Path) -> bool:
        try:
            path.unlink(missing_ok=True)
            return True
        except OSError as e:
            log.error("Could not delete recording file %s: %s", path, e)
            return False

    def stop_recording(self, job_id: int) -> bool:
        """SIGINT the job's ffmpeg; the exit handler classifies the result."""
        with self._lock:
            process = self._recordings.get(job_id)
        if process is None:
            log.warning("Cannot stop job %s: no running ffmpeg process found", job_id)
            return False
        log.info("Gracefully stopping recording for job %s (pid %s)", job_id, process.pid)
        if not process.interrupt():
            log.error("Error sending SIGINT for job %s, trying SIGKILL", job_id)
            process.kill()
        return True

    # =========================================================================
    # Job Management
    # =========================================================================

    def cancel_job(self, job_id: int, user_id: int | None = None) -> DvrJob:
        """Disarm a scheduled job and mark it cancelled."""
        job = self.get_job(job_id, user_id)
        if job.status != "scheduled":
            raise InvalidJobState(job.id, job.status, "Only scheduled jobs can be cancelled.")
        self._disarm(job.id)
        db.update_job(job.id, only_if_status=("scheduled",), status="cancelled")
        log.info("Cancelled job %s", job.id)
        job.status = "cancelled"
        return job

    def stop_job(self, job_id: int, user_id: int | None = None) -> DvrJob:
        """Stop a recording now (or cancel one that has not started)."""
        job = self.get_job(job_id, user_id)
        if job.status == "scheduled":
            return self.cancel_job(job.id, user_id)
        if job.status != "recording":
            raise InvalidJobState(job.id, job.status, "Only scheduled or recording jobs can be stopped.")
        self._disarm(job.id)
        if not self.stop_recording(job.id):
            # Nothing to wait for, so nothing will ever classify it
            db.update_job(
                job.id,
                only_if_status=("recording",),
                status="error",
                ffmpeg_pid=None,
                error_message="Recording process was not running.",
            )
            job.status = "error"
        return job

    def reschedule_job(
        self, job_id: int, start: datetime, end: datetime, user_id: int | None = None
    ) -> DvrJob:
        """Replace a scheduled job's window and re-arm it."""
        job = self.get_job(job_id, user_id)
        if job.status != "scheduled":
            raise InvalidJobState(job.id, job.status, "Only scheduled jobs can be modified.")
        job.start_time = _as_utc(start)
        job.end_time = _as_utc(end)
        if job.end_time <= self.now():
            raise PastScheduleError(job.id)
        self._check_conflicts(job)
        db.update_job(job.id, start_time=job.start_time, end_time=job.end_time)
        self._arm(job)
        log.info("Updated and rescheduled job %s", job.id)
        return job

    def delete_job_history(self, job_id: int, user_id: int | None = None) -> None:
        job = self.get_job(job_id, user_id)
        if not job.is_terminal:
            raise InvalidJobState(
                job.id,
                job.status,
                "Only completed, cancelled, or error jobs can be removed from history.",
            )
        db.delete_job(job.id)
        log.info("Deleted job history for job %s", job.id)

    def clear_jobs(self, user_id: int) -> int:
        """Delete every job of a user, disarming pending timers. Returns count."""
        log.info("Clearing all scheduled/historical jobs for user %s", user_id)
        for job in db.list_jobs(user_id=user_id, status="scheduled"):
            self._disarm(job.id)
        return db.delete_jobs_for_user(user_id)

    def list_jobs(self, user_id: int | None = None, status: str | None = None) -> list[DvrJob]:
        return db.list_jobs(user_id=user_id, status=status)

    # =========================================================================
    # Recordings
    # =========================================================================

    def list_recordings(self, user_id: int | None = None) -> list[DvrRecording]:
        return db.list_recordings(user_id)

    def delete_recording(self, recording_id: int, user_id: int | None = None) -> None:
        recording = db.get_recording(recording_id, user_id)
        if recording is None:
            raise RecordingNotFound(recording_id)
        self._remove_file(Path(recording.file_path))
        db.delete_recording(recording.id)
        log.info("Deleted recording %s (%s)", recording.id, recording.file_path)

    def delete_all_recordings(self, user_id: int) -> int:
        log.info("Deleting all completed recordings for user %s", user_id)
        for recording in db.list_recordings(user_id):
            self._remove_file(Path(recording.file_path))
        return db.delete_recordings_for_user(user_id)

    def timeshift_path(self, job_id: int, user_id: int | None = None) -> Path:
        """Growing output file of an in-progress recording."""
        job = self.get_job(job_id, user_id)
        if job.status != "recording":
            raise InvalidJobState(
                job.id, job.status, "Cannot timeshift a recording that is not in progress."
            )
        if not job.file_path or not Path(job.file_path).exists():
            raise RecordingFileMissing(job.file_path)
        return Path(job.file_path)

    def storage_usage(self) -> StorageUsage:
        usage = shutil.disk_usage(self.dvr_dir)
        used = usage.total - usage.free
        percentage = round(used / usage.total * 100) if usage.total else 0
        return StorageUsage(total=usage.total, used=used, percentage=percentage)

    def auto_delete_old_recordings(self) -> int:
        """Delete recordings older than each user's auto_delete_days. Returns count."""
        log.info("Running daily check for old recordings to delete")
        deleted = 0
        for user_id in db.recording_user_ids():
            days = int(settings_module.get_dvr_settings(user_id).get("auto_delete_days") or 0)
            if days <= 0:
                continue
            cutoff = self.now() - timedelta(days=days)
            old = db.recordings_started_before(user_id, cutoff)
            if old:
                log.info("Found %d old recording(s) to delete for user %s", len(old), user_id)
            for recording in old:
                path = Path(recording.file_path)
                # Keep the row if the file could not be removed, retry tomorrow
                if path.exists() and not self._remove_file(path):
                    continue
                db.delete_recording(recording.id)
                deleted += 1
        return deleted

    def start_auto_delete(self) -> None:
        self._scheduler.daily_at(
            self.AUTO_DELETE_TIMER_KEY, AUTO_DELETE_HOUR, 0, self.auto_delete_old_recordings
        )

    # =========================================================================
    # Startup / Shutdown
    # =========================================================================

    def recover_on_startup(self) -> int:
        """Fail orphaned recordings and re-arm scheduled jobs. Returns jobs re-armed."""
        failed = db.fail_stale_recording_jobs(RESTART_MESSAGE)
        if failed:
            log.warning("Marked %d interrupted recording(s) as error", failed)
        armed = 0
        for job in db.list_jobs(status="scheduled"):
            if self._arm(job):
                armed += 1
        log.info("Loaded and scheduled %d DVR job(s)", armed)
        return armed

    def shutdown(self) -> None:
        """Disarm all timers and ask running recordings to finish."""
        self._scheduler.cancel(self.AUTO_DELETE_TIMER_KEY)
        with self._lock:
            armed = list(self._armed)
            running = list(self._recordings.items())
        for job_id in armed:
            self._disarm(job_id)
        for job_id, process in running:
            if process.interrupt():
                log.info("Shutdown: interrupted recording for job %s", job_id)
