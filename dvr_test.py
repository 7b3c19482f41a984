"""Tests for DVR scheduling, recording lifecycle and cleanup."""

from datetime import UTC, datetime, timedelta
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import patch

import asyncio
import logging
import os
import signal
import sqlite3

import pytest

import db
import settings as settings_module
from channels import Channel, ChannelDirectory
from db import DvrJob, DvrRecording
from dvr import (
    PAST_MESSAGE,
    RESTART_MESSAGE,
    DvrScheduler,
    check_output_file,
    is_graceful_exit,
    overlaps,
    recording_filename,
)
from errors import (
    ConflictError,
    FileTooSmallError,
    InvalidJobState,
    JobNotFound,
    PastScheduleError,
    RecordingFileMissing,
    RecordingNotFound,
)
from ffmpeg_command import Profile, ProfileResolver
from ffmpeg_process import ProcessExited, ProcessRunner
from testing import FakeSpawner, settle
from timers import Scheduler


NOW = datetime(2024, 1, 1, 19, 0, tzinfo=UTC)
PROGRAM_START = datetime(2024, 1, 1, 20, 0, tzinfo=UTC)
PROGRAM_STOP = datetime(2024, 1, 1, 21, 0, tzinfo=UTC)
CHANNEL_URL = "http://provider/live/1.ts"


class Env:
    """DVR scheduler over fakes with a controllable wall clock."""

    def __init__(self, tmp_path: Path, spawner: FakeSpawner | None = None):
        self.settings = settings_module.default_settings()
        settings_module.init(lambda: self.settings)
        self.now = NOW.timestamp()
        self.spawner = spawner or FakeSpawner()
        self.scheduler = Scheduler(clock=lambda: self.now)
        self.dvr_dir = tmp_path / "dvr"
        self.dvr = DvrScheduler(
            ProfileResolver(),
            ProcessRunner(self.spawner),
            ChannelDirectory([Channel("news.us", CHANNEL_URL, "NEWS HD")]),
            self.scheduler,
            dvr_dir=self.dvr_dir,
        )

    def schedule(self, user_id: int = 1, start=PROGRAM_START, stop=PROGRAM_STOP, channel_id="news.us", title="Evening News"):
        return self.dvr.schedule(user_id, channel_id, "News", title, start, stop)

    def set_dvr(self, user_id: int | None = None, **values) -> None:
        if user_id is None:
            self.settings["dvr"].update(values)
        else:
            self.settings["user_dvr"].setdefault(str(user_id), {}).update(values)

    async def record(self, job: DvrJob, size: int = 4096):
        """Start job now and write `size` bytes to its output file."""
        process = await self.dvr.start_recording(job.id)
        assert process is not None
        path = Path(db.get_job(job.id).file_path)
        path.write_bytes(b"\0" * size)
        return process, path


@pytest.fixture
def env(tmp_path: Path):
    db.init(tmp_path)
    yield Env(tmp_path)
    settings_module.init(settings_module.default_settings)
    db.close()


def _run(env: Env, coro_fn):
    async def main():
        try:
            return await coro_fn()
        finally:
            env.scheduler.cancel_all()

    return asyncio.run(main())


def _insert(user_id=1, start=PROGRAM_START, stop=PROGRAM_STOP, status="scheduled") -> DvrJob:
    job = DvrJob(
        user_id=user_id,
        channel_id="news.us",
        channel_name="News",
        program_title="Evening News",
        start_time=start,
        end_time=stop,
        status=status,
        profile_id="dvr-ts-default",
        user_agent_id=settings_module.DEFAULT_USER_AGENT_ID,
    )
    db.insert_job(job)
    return job


# =============================================================================
# Helpers
# =============================================================================


class TestHelpers:
    """Tests for overlap, naming and exit classification."""

    def test_touching_windows_do_not_overlap(self):
        assert not overlaps(PROGRAM_START, PROGRAM_STOP, PROGRAM_STOP, PROGRAM_STOP + timedelta(hours=1))
        assert overlaps(PROGRAM_START, PROGRAM_STOP, PROGRAM_STOP - timedelta(seconds=1), PROGRAM_STOP)

    def test_overlap_is_symmetric(self):
        a = (PROGRAM_START, PROGRAM_STOP)
        b = (PROGRAM_START + timedelta(minutes=30), PROGRAM_STOP + timedelta(minutes=30))
        assert overlaps(*a, *b) and overlaps(*b, *a)

    def test_filename_sanitized(self):
        job = SimpleNamespace(id=7, program_title="News @ 9: Live!")
        ts = Profile("p", "P", '-i "{streamUrl}" -f mpegts "{filePath}"')
        mp4 = Profile("p", "P", '-i "{streamUrl}" -f mp4 "{filePath}"')
        assert recording_filename(job, ts) == "7_news___9__live_.ts"
        assert recording_filename(job, mp4) == "7_news___9__live_.mp4"

    @pytest.mark.parametrize(
        ("code", "interrupted", "graceful"),
        [(0, False, True), (255, False, True), (1, False, False), (-9, False, False), (1, True, True)],
    )
    def test_graceful_exit(self, code, interrupted, graceful):
        assert is_graceful_exit(ProcessExited(code=code, signal=None, stderr_tail="", interrupted=interrupted)) is graceful

    def test_size_threshold(self, tmp_path: Path):
        path = tmp_path / "x.ts"
        path.write_bytes(b"\0" * 1024)
        with pytest.raises(FileTooSmallError):
            check_output_file(path)
        path.write_bytes(b"\0" * 1025)
        assert check_output_file(path) == 1025

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(OSError):
            check_output_file(tmp_path / "missing.ts")


# =============================================================================
# Scheduling
# =============================================================================


class TestSchedule:
    """Tests for schedule/schedule_manual and conflict detection."""

    def test_buffers_applied(self, env: Env):
        async def run():
            job = env.schedule()
            return job, db.get_job(job.id), env.scheduler.due_at(("dvr-start", job.id))

        job, stored, start_due = _run(env, run)
        assert job.start_time == datetime(2024, 1, 1, 19, 59, tzinfo=UTC)
        assert job.end_time == datetime(2024, 1, 1, 21, 2, tzinfo=UTC)
        assert (job.pre_buffer_minutes, job.post_buffer_minutes) == (1, 2)
        assert job.profile_id == "dvr-ts-default"
        assert stored == job
        assert start_due == job.start_time.timestamp()

    def test_user_overrides(self, env: Env):
        env.set_dvr(1, pre_buffer_minutes=5, post_buffer_minutes=0, active_recording_profile_id="dvr-mp4-default")

        async def run():
            return env.schedule()

        job = _run(env, run)
        assert job.start_time == PROGRAM_START - timedelta(minutes=5)
        assert job.end_time == PROGRAM_STOP
        assert job.profile_id == "dvr-mp4-default"

    def test_manual(self, env: Env):
        async def run():
            return env.dvr.schedule_manual(1, "news.us", "News", PROGRAM_START, PROGRAM_STOP)

        job = _run(env, run)
        assert job.program_title == "Manual Recording: News"
        assert (job.start_time, job.end_time) == (PROGRAM_START, PROGRAM_STOP)

    def test_naive_datetimes_are_utc(self, env: Env):
        async def run():
            return env.dvr.schedule_manual(1, "news.us", "News", datetime(2024, 1, 1, 20, 0), datetime(2024, 1, 1, 21, 0))

        assert _run(env, run).start_time == PROGRAM_START

    def test_past_rejected(self, env: Env):
        async def run():
            with pytest.raises(PastScheduleError):
                env.schedule(start=NOW - timedelta(hours=2), stop=NOW - timedelta(minutes=1))
            return db.list_jobs()

        assert _run(env, run) == []

    def test_overlap_conflicts(self, env: Env):
        async def run():
            first = env.schedule()
            with pytest.raises(ConflictError) as exc:
                env.schedule(start=PROGRAM_START + timedelta(minutes=30), stop=PROGRAM_STOP + timedelta(minutes=30))
            return first, exc.value, db.list_jobs()

        first, error, jobs = _run(env, run)
        assert error.status_code == 409
        assert [j.id for j in error.conflicting_jobs] == [first.id]
        assert error.new_job.id is None
        assert len(jobs) == 1

    def test_conflict_detected_in_either_order(self, env: Env):
        env.set_dvr(pre_buffer_minutes=0, post_buffer_minutes=0)
        later = (PROGRAM_START + timedelta(minutes=30), PROGRAM_STOP + timedelta(minutes=30))

        async def run():
            env.schedule(start=later[0], stop=later[1])
            with pytest.raises(ConflictError):
                env.schedule()

        _run(env, run)

    def test_touching_jobs_allowed(self, env: Env):
        env.set_dvr(pre_buffer_minutes=0, post_buffer_minutes=0)

        async def run():
            env.schedule()
            env.schedule(start=PROGRAM_STOP, stop=PROGRAM_STOP + timedelta(hours=1))
            return len(db.list_jobs())

        assert _run(env, run) == 2

    def test_other_users_do_not_conflict(self, env: Env):
        async def run():
            env.schedule(user_id=1)
            env.schedule(user_id=2)
            return len(db.list_jobs())

        assert _run(env, run) == 2

    def test_max_concurrent(self, env: Env):
        env.set_dvr(max_concurrent_recordings=2)

        async def run():
            env.schedule()
            env.schedule()
            with pytest.raises(ConflictError) as exc:
                env.schedule()
            return len(exc.value.conflicting_jobs)

        assert _run(env, run) == 2

    def test_only_scheduled_jobs_conflict(self, env: Env):
        async def run():
            first = env.schedule()
            env.dvr.cancel_job(first.id)
            env.schedule()
            return len(db.list_jobs())

        assert _run(env, run) == 2


# =============================================================================
# Recording Lifecycle
# =============================================================================


class TestRecording:
    """Tests for start_recording and exit classification."""

    def test_start_marks_recording(self, env: Env):
        async def run():
            job = env.schedule()
            process = await env.dvr.start_recording(job.id)
            return job, process, db.get_job(job.id), env.spawner.calls[0]

        job, process, stored, cmd = _run(env, run)
        expected_path = env.dvr_dir / f"{job.id}_evening_news.ts"
        assert stored.status == "recording"
        assert stored.ffmpeg_pid == process.pid
        assert stored.file_path == str(expected_path)
        assert env.dvr_dir.is_dir()
        assert cmd[:3] == ["ffmpeg", "-v", "level+warning"]
        assert cmd[cmd.index("-i") + 1] == CHANNEL_URL
        assert cmd[-1] == str(expected_path)

    def test_graceful_stop_completes(self, env: Env):
        async def run():
            job = env.schedule()
            process, path = await env.record(job, size=2048)
            env.dvr.stop_recording(job.id)
            await settle()
            return job, process, path

        job, process, path = _run(env, run)
        assert env.spawner.last.signals == [signal.SIGINT]
        assert db.get_job(job.id).status == "completed"
        assert db.get_job(job.id).ffmpeg_pid is None
        [recording] = db.list_recordings(1)
        assert recording.job_id == job.id
        assert recording.file_size_bytes == 2048
        assert recording.duration_seconds == 63 * 60
        assert recording.file_path == str(path)
        assert os.stat(path).st_mode & 0o777 == 0o666
        assert not env.dvr.is_recording(job.id)

    def test_progress_output_does_not_end_recording(self, env: Env):
        progress = b"frame= 1200 fps= 25 q=-1.0 size=   20480kB time=00:00:48.00 speed=1x\r" * 2000

        async def run():
            job = env.schedule()
            await env.record(job)
            env.spawner.last.stderr.feed_data(progress)
            await settle(50)
            during = db.get_job(job.id).status, env.dvr.is_recording(job.id)
            env.dvr.stop_recording(job.id)
            await settle()
            return during, db.get_job(job.id).status

        during, final = _run(env, run)
        assert during == ("recording", True)
        assert final == "completed"

    def test_exit_zero_completes(self, env: Env):
        async def run():
            job = env.schedule()
            await env.record(job, size=1025)
            env.spawner.last.exit(0)
            await settle()
            return db.get_job(job.id).status

        assert _run(env, run) == "completed"

    def test_small_file_is_error_and_removed(self, env: Env):
        async def run():
            job = env.schedule()
            _, path = await env.record(job, size=1024)
            env.spawner.last.exit(0)
            await settle()
            return db.get_job(job.id), path

        job, path = _run(env, run)
        assert job.status == "error"
        assert "Output file too small (1024 bytes)." in job.error_message
        assert not path.exists()
        assert db.list_recordings() == []

    def test_missing_file_is_error(self, env: Env):
        async def run():
            job = env.schedule()
            await env.dvr.start_recording(job.id)
            env.spawner.last.exit(255)
            await settle()
            return db.get_job(job.id)

        job = _run(env, run)
        assert job.status == "error"
        assert "File stat error" in job.error_message

    def test_crash_is_error_with_output(self, env: Env):
        async def run():
            job = env.schedule()
            _, path = await env.record(job)
            env.spawner.last.exit(1, stderr="Connection reset by peer")
            await settle()
            return db.get_job(job.id), path

        job, path = _run(env, run)
        assert job.status == "error"
        assert job.error_message.startswith("Recording failed. FFmpeg exit code: 1.")
        assert "Connection reset by peer" in job.error_message
        assert path.exists()
        assert db.list_recordings() == []

    def test_missing_channel(self, env: Env):
        async def run():
            job = env.schedule(channel_id="gone")
            result = await env.dvr.start_recording(job.id)
            return result, db.get_job(job.id)

        result, job = _run(env, run)
        assert result is None
        assert job.status == "error"
        assert job.error_message == "Channel ID gone not found."
        assert env.spawner.calls == []

    def test_missing_profile(self, env: Env):
        env.set_dvr(active_recording_profile_id="deleted-profile")

        async def run():
            job = env.schedule()
            await env.dvr.start_recording(job.id)
            return db.get_job(job.id)

        job = _run(env, run)
        assert job.status == "error"
        assert job.error_message == 'Recording profile with ID "deleted-profile" not found.'
        assert env.spawner.calls == []

    def test_missing_user_agent(self, env: Env):
        env.settings["active_user_agent_id"] = "deleted-ua"

        async def run():
            job = env.schedule()
            await env.dvr.start_recording(job.id)
            return db.get_job(job.id)

        job = _run(env, run)
        assert job.status == "error"
        assert "deleted-ua" in job.error_message

    def test_spawn_failure(self, env: Env):
        env.spawner.fail = FileNotFoundError(2, "No such file or directory", "ffmpeg")

        async def run():
            job = env.schedule()
            await env.dvr.start_recording(job.id)
            return db.get_job(job.id)

        job = _run(env, run)
        assert job.status == "error"
        assert job.error_message.startswith("Failed to spawn ffmpeg process:")

    def test_only_scheduled_jobs_start(self, env: Env):
        async def run():
            job = env.schedule()
            env.dvr.cancel_job(job.id)
            return await env.dvr.start_recording(job.id)

        assert _run(env, run) is None
        assert env.spawner.calls == []

    def test_start_in_past_fires_immediately(self, env: Env):
        async def run():
            job = env.schedule(start=NOW - timedelta(minutes=30), stop=NOW + timedelta(minutes=30))
            await settle()
            return db.get_job(job.id).status

        assert _run(env, run) == "recording"
        assert len(env.spawner.calls) == 1

    def test_stop_timer_stops_recording(self, env: Env):
        async def run():
            job = env.schedule(start=NOW - timedelta(minutes=30), stop=NOW + timedelta(seconds=0.05))
            await settle()
            Path(db.get_job(job.id).file_path).write_bytes(b"\0" * 4096)
            env.now += 1
            await asyncio.sleep(0.1)
            await settle()
            return db.get_job(job.id).status

        assert _run(env, run) == "completed"

    def test_job_deleted_while_recording_keeps_file(self, env: Env):
        async def run():
            job = env.schedule()
            _, path = await env.record(job)
            db.delete_job(job.id)
            env.spawner.last.exit(255)
            await settle()
            return path

        path = _run(env, run)
        [recording] = db.list_recordings()
        assert recording.job_id is None
        assert path.exists()

    def test_terminal_state_not_overwritten(self, env: Env):
        async def run():
            job = env.schedule()
            await env.record(job)
            db.update_job(job.id, status="cancelled")
            env.spawner.last.exit(1)
            await settle()
            return db.get_job(job.id).status

        assert _run(env, run) == "cancelled"

    def test_reload_failure_after_recording_keeps_file(self, env: Env, caplog):
        async def run():
            job = env.schedule()
            _, path = await env.record(job)
            db.update_job(job.id, status="cancelled")
            with patch("db.get_job", side_effect=sqlite3.OperationalError("database is locked")):
                env.spawner.last.exit(0)
                await settle()
            return job, path

        with caplog.at_level(logging.ERROR):
            job, path = _run(env, run)
        assert path.exists()
        assert db.list_recordings() == []
        assert db.get_job(job.id).status == "cancelled"
        assert "Could not reload job" in caplog.text
        assert "Exit callback failed" not in caplog.text


# =============================================================================
# Job Management
# =============================================================================


class TestJobManagement:
    """Tests for cancel/stop/reschedule/delete/clear."""

    def test_cancel_disarms(self, env: Env):
        async def run():
            job = env.schedule()
            cancelled = env.dvr.cancel_job(job.id, user_id=1)
            armed = env.scheduler.is_armed(("dvr-start", job.id)) or env.scheduler.is_armed(("dvr-stop", job.id))
            return cancelled, armed, db.get_job(job.id).status

        cancelled, armed, status = _run(env, run)
        assert cancelled.status == status == "cancelled"
        assert armed is False

    def test_cancel_twice(self, env: Env):
        async def run():
            job = env.schedule()
            env.dvr.cancel_job(job.id)
            env.dvr.cancel_job(job.id)

        with pytest.raises(InvalidJobState) as exc:
            _run(env, run)
        assert exc.value.status_code == 400

    def test_other_users_job(self, env: Env):
        async def run():
            job = env.schedule(user_id=1)
            env.dvr.cancel_job(job.id, user_id=2)

        with pytest.raises(JobNotFound):
            _run(env, run)

    def test_stop_scheduled_cancels(self, env: Env):
        async def run():
            job = env.schedule()
            return env.dvr.stop_job(job.id).status

        assert _run(env, run) == "cancelled"

    def test_stop_recording_job(self, env: Env):
        async def run():
            job = env.schedule()
            await env.record(job)
            env.dvr.stop_job(job.id)
            await settle()
            return db.get_job(job.id).status

        assert _run(env, run) == "completed"
        assert env.spawner.last.signals == [signal.SIGINT]

    def test_stop_terminal_job(self, env: Env):
        job = _insert(status="completed")

        with pytest.raises(InvalidJobState):
            env.dvr.stop_job(job.id)

    def test_stop_recording_without_process(self, env: Env):
        job = _insert(status="recording")

        async def run():
            return env.dvr.stop_job(job.id)

        assert _run(env, run).status == "error"
        assert db.get_job(job.id).error_message == "Recording process was not running."

    def test_reschedule(self, env: Env):
        new_start = PROGRAM_START + timedelta(days=1)

        async def run():
            job = env.schedule()
            updated = env.dvr.reschedule_job(job.id, new_start, new_start + timedelta(hours=1))
            return updated, db.get_job(job.id), env.scheduler.due_at(("dvr-start", job.id))

        updated, stored, due = _run(env, run)
        assert stored.start_time == updated.start_time == new_start
        assert due == new_start.timestamp()

    def test_reschedule_ignores_itself(self, env: Env):
        async def run():
            job = env.schedule()
            return env.dvr.reschedule_job(job.id, job.start_time + timedelta(minutes=5), job.end_time)

        assert _run(env, run).status == "scheduled"

    def test_reschedule_into_conflict(self, env: Env):
        async def run():
            env.schedule()
            other = env.schedule(start=PROGRAM_STOP + timedelta(hours=2), stop=PROGRAM_STOP + timedelta(hours=3))
            env.dvr.reschedule_job(other.id, PROGRAM_START, PROGRAM_STOP)

        with pytest.raises(ConflictError):
            _run(env, run)

    def test_reschedule_into_past(self, env: Env):
        async def run():
            job = env.schedule()
            with pytest.raises(PastScheduleError):
                env.dvr.reschedule_job(job.id, NOW - timedelta(hours=2), NOW - timedelta(hours=1))
            return db.get_job(job.id).start_time, job.start_time

        stored, original = _run(env, run)
        assert stored == original

    def test_reschedule_non_scheduled(self, env: Env):
        job = _insert(status="error")

        with pytest.raises(InvalidJobState):
            env.dvr.reschedule_job(job.id, PROGRAM_START, PROGRAM_STOP)

    def test_delete_history(self, env: Env):
        done = _insert(status="completed")
        pending = _insert(status="scheduled")
        env.dvr.delete_job_history(done.id)
        with pytest.raises(JobNotFound):
            env.dvr.get_job(done.id)
        with pytest.raises(InvalidJobState):
            env.dvr.delete_job_history(pending.id)

    def test_clear_jobs(self, env: Env):
        async def run():
            job = env.schedule(user_id=1)
            env.schedule(user_id=2)
            _insert(user_id=1, status="completed")
            count = env.dvr.clear_jobs(1)
            return count, env.scheduler.is_armed(("dvr-start", job.id)), len(db.list_jobs())

        assert _run(env, run) == (2, False, 1)


# =============================================================================
# Recordings
# =============================================================================


def _recording(tmp_path: Path, user_id: int = 1, name: str = "1_news.ts", start: datetime = NOW) -> DvrRecording:
    path = tmp_path / name
    path.write_bytes(b"\0" * 2048)
    recording = DvrRecording(
        user_id=user_id,
        channel_name="News",
        program_title="News",
        start_time=start,
        duration_seconds=3600,
        file_size_bytes=2048,
        file_path=str(path),
    )
    db.insert_recording(recording)
    return recording


class TestRecordings:
    """Tests for recording management and storage."""

    def test_delete_recording(self, env: Env, tmp_path: Path):
        recording = _recording(tmp_path)
        env.dvr.delete_recording(recording.id, user_id=1)
        assert not Path(recording.file_path).exists()
        assert db.list_recordings() == []

    def test_delete_recording_of_other_user(self, env: Env, tmp_path: Path):
        recording = _recording(tmp_path)
        with pytest.raises(RecordingNotFound):
            env.dvr.delete_recording(recording.id, user_id=2)

    def test_delete_recording_file_already_gone(self, env: Env, tmp_path: Path):
        recording = _recording(tmp_path)
        Path(recording.file_path).unlink()
        env.dvr.delete_recording(recording.id)
        assert db.list_recordings() == []

    def test_delete_all(self, env: Env, tmp_path: Path):
        a = _recording(tmp_path, name="a.ts")
        _recording(tmp_path, name="b.ts")
        _recording(tmp_path, user_id=2, name="c.ts")
        assert env.dvr.delete_all_recordings(1) == 2
        assert not Path(a.file_path).exists()
        assert len(db.list_recordings()) == 1

    def test_timeshift_path(self, env: Env):
        async def run():
            job = env.schedule()
            _, path = await env.record(job)
            return env.dvr.timeshift_path(job.id, user_id=1), path

        served, path = _run(env, run)
        assert served == path

    def test_timeshift_requires_recording(self, env: Env):
        job = _insert(status="completed")
        with pytest.raises(InvalidJobState):
            env.dvr.timeshift_path(job.id)

    def test_timeshift_file_missing(self, env: Env):
        async def run():
            job = env.schedule()
            await env.dvr.start_recording(job.id)
            env.dvr.timeshift_path(job.id)

        with pytest.raises(RecordingFileMissing):
            _run(env, run)

    def test_storage_usage(self, env: Env):
        usage = SimpleNamespace(total=1000, used=250, free=750)
        with patch("dvr.shutil.disk_usage", return_value=usage):
            assert env.dvr.storage_usage().to_dict() == {"total": 1000, "used": 250, "percentage": 25}


class TestAutoDelete:
    """Tests for the daily retention sweep."""

    def test_deletes_only_expired(self, env: Env, tmp_path: Path):
        env.set_dvr(1, auto_delete_days=7)
        old = _recording(tmp_path, name="old.ts", start=NOW - timedelta(days=8))
        new = _recording(tmp_path, name="new.ts", start=NOW - timedelta(days=6))
        keep = _recording(tmp_path, user_id=2, name="other.ts", start=NOW - timedelta(days=30))

        assert env.dvr.auto_delete_old_recordings() == 1
        assert not Path(old.file_path).exists()
        assert {r.id for r in db.list_recordings()} == {new.id, keep.id}

    def test_row_kept_when_unlink_fails(self, env: Env, tmp_path: Path):
        env.set_dvr(auto_delete_days=1)
        _recording(tmp_path, start=NOW - timedelta(days=3))
        with patch.object(DvrScheduler, "_remove_file", return_value=False):
            assert env.dvr.auto_delete_old_recordings() == 0
        assert len(db.list_recordings()) == 1

    def test_missing_file_row_removed(self, env: Env, tmp_path: Path):
        env.set_dvr(auto_delete_days=1)
        recording = _recording(tmp_path, start=NOW - timedelta(days=3))
        Path(recording.file_path).unlink()
        assert env.dvr.auto_delete_old_recordings() == 1

    def test_daily_timer_armed(self, env: Env):
        async def run():
            env.dvr.start_auto_delete()
            return env.scheduler.due_at(DvrScheduler.AUTO_DELETE_TIMER_KEY)

        due = datetime.fromtimestamp(_run(env, run))
        assert (due.hour, due.minute) == (2, 0)
        assert due.timestamp() > NOW.timestamp()


# =============================================================================
# Recovery / Shutdown
# =============================================================================


class TestRecovery:
    """Tests for recover_on_startup."""

    def test_recovery(self, env: Env):
        interrupted = _insert(status="recording")
        stale = _insert(start=NOW - timedelta(hours=3), stop=NOW - timedelta(hours=2))
        future = _insert()

        async def run():
            armed = env.dvr.recover_on_startup()
            return armed, env.scheduler.is_armed(("dvr-start", future.id))

        armed, future_armed = _run(env, run)
        assert armed == 1
        assert future_armed
        assert (db.get_job(interrupted.id).status, db.get_job(interrupted.id).error_message) == (
            "error",
            RESTART_MESSAGE,
        )
        assert (db.get_job(stale.id).status, db.get_job(stale.id).error_message) == ("error", PAST_MESSAGE)
        assert db.get_job(future.id).status == "scheduled"

    def test_in_progress_window_starts(self, env: Env):
        job = _insert(start=NOW - timedelta(minutes=10), stop=NOW + timedelta(minutes=50))

        async def run():
            env.dvr.recover_on_startup()
            await settle()
            return db.get_job(job.id).status

        assert _run(env, run) == "recording"

    def test_terminal_jobs_untouched(self, env: Env):
        job = _insert(status="completed")

        async def run():
            return env.dvr.recover_on_startup()

        assert _run(env, run) == 0
        assert db.get_job(job.id).status == "completed"


class TestShutdown:
    """Tests for shutdown."""

    def test_disarms_and_interrupts(self, env: Env):
        async def run():
            pending = env.schedule(user_id=2)
            running = env.schedule(user_id=1)
            await env.record(running)
            env.dvr.start_auto_delete()
            env.dvr.shutdown()
            await settle()
            return pending, running

        pending, running = _run(env, run)
        assert not env.scheduler.is_armed(("dvr-start", pending.id))
        assert not env.scheduler.is_armed(DvrScheduler.AUTO_DELETE_TIMER_KEY)
        assert env.spawner.last.signals == [signal.SIGINT]
        assert db.get_job(running.id).status == "completed"


if __name__ == "__main__":
    from testing import run_tests

    run_tests(__file__)
