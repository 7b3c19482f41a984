"""Gateway wiring: builds the engines, runs startup recovery and shutdown."""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

import logging
import logging.handlers

from fastapi.responses import RedirectResponse, StreamingResponse

import db
import settings as settings_module
from channels import ChannelDirectory
from db import DvrJob, DvrRecording
from dvr import DvrScheduler, StorageUsage
from ffmpeg_command import ProfileResolver
from ffmpeg_process import ProcessRunner
from ffmpeg_session import (
    AttachResult,
    InactivityJanitor,
    StopResult,
    StreamHandle,
    StreamSessionManager,
)
from history import HistoryRecorder, Observer
from timers import Scheduler


log = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_FILE_NAME = "gateway.log"

_installed_handlers: list[logging.Handler] = []


def setup_logging(
    level: str | int = logging.INFO,
    log_dir: Path | None = None,
    max_files: int = 5,
    max_file_size_bytes: int = 5 * 1024 * 1024,
) -> logging.Logger:
    """Configure the root logger: console always, rotating file if log_dir is set.

    Calling it again replaces the handlers installed by the previous call.
    """
    root = logging.getLogger()
    root.setLevel(level)
    while _installed_handlers:
        handler = _installed_handlers.pop()
        root.removeHandler(handler)
        handler.close()

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(
            logging.handlers.RotatingFileHandler(
                str(log_dir / LOG_FILE_NAME),
                maxBytes=max_file_size_bytes,
                backupCount=max(0, max_files - 1),
            )
        )
    for handler in handlers:
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
        _installed_handlers.append(handler)
    return root


@dataclass(slots=True)
class JobFilter:
    user_id: int | None = None
    status: str | None = None


def to_response(result: AttachResult) -> RedirectResponse | StreamingResponse:
    """HTTP response for an attach: 302 for redirect profiles, else the stream body."""
    if result.is_redirect:
        return RedirectResponse(result.redirect_url or "", status_code=302)
    handle = result.handle
    assert handle is not None

    async def body() -> AsyncIterator[bytes]:
        try:
            async for chunk in handle:
                yield chunk
        finally:
            handle.close()

    return StreamingResponse(body(), media_type=result.content_type)


class Gateway:
    """Facade over the session manager and DVR scheduler."""

    def __init__(
        self,
        channels: ChannelDirectory | None = None,
        runner: ProcessRunner | None = None,
        scheduler: Scheduler | None = None,
        history: HistoryRecorder | None = None,
        settings_path: Path | None = None,
        data_dir: Path | None = None,
        dvr_dir: Path | None = None,
        log_dir: Path | None = None,
    ):
        self._settings_path = settings_path
        self._settings: dict[str, Any] = {}
        self._data_dir = data_dir
        self._log_dir = log_dir
        self.channels = channels or ChannelDirectory()
        self.scheduler = scheduler or Scheduler()
        self.history = history or HistoryRecorder()
        self.resolver = ProfileResolver()
        runner = runner or ProcessRunner()
        self.sessions = StreamSessionManager(self.resolver, runner, self.history, self.channels)
        self.janitor = InactivityJanitor(self.sessions, self.scheduler)
        self.dvr = DvrScheduler(self.resolver, runner, self.channels, self.scheduler, dvr_dir)
        self.started = False

    def reload_settings(self) -> dict[str, Any]:
        self._settings = settings_module.load_settings(self._settings_path)
        settings_module.init(lambda: self._settings)
        return self._settings

    async def start(self) -> None:
        """Load settings, install logging, open the database, recover DVR jobs, start periodic work.

        Must run inside the event loop that will own the timers.
        """
        settings = self.reload_settings()
        data_dir = self._data_dir or Path(settings.get("data_dir") or "/data")
        logs = {**settings_module.DEFAULT_SETTINGS["logs"], **(settings.get("logs") or {})}
        setup_logging(
            log_dir=self._log_dir or data_dir / "logs",
            max_files=int(logs["max_files"]),
            max_file_size_bytes=int(logs["max_file_size_bytes"]),
        )
        db.init(data_dir)
        self.dvr.recover_on_startup()
        self.dvr.start_auto_delete()
        self.janitor.start()
        self.started = True
        log.info("Gateway started (data dir %s, dvr dir %s)", data_dir, self.dvr.dvr_dir)

    def shutdown(self) -> None:
        """Kill live streams, interrupt recordings, cancel every timer."""
        log.info("Gateway shutting down")
        self.janitor.stop()
        self.sessions.shutdown()
        self.dvr.shutdown()
        self.scheduler.cancel_all()
        self.started = False

    # =========================================================================
    # Live Streams
    # =========================================================================

    async def attach_stream(
        self,
        user_id: int,
        stream_url: str,
        profile_id: str,
        user_agent_id: str | None = None,
        **metadata: Any,
    ) -> AttachResult:
        if user_agent_id is None:
            user_agent_id = settings_module.get_settings().get("active_user_agent_id")
        return await self.sessions.attach(user_id, stream_url, profile_id, user_agent_id, **metadata)

    def detach_stream(self, handle: StreamHandle) -> None:
        handle.close()

    def stop_stream(self, user_id: int, stream_url: str, profile_id: str | None = None) -> StopResult:
        return self.sessions.stop(user_id, stream_url, profile_id)

    def admin_stop_stream(self, stream_key: str) -> StopResult:
        return self.sessions.admin_stop(stream_key)

    def start_redirect(self, user_id: int, stream_url: str, **metadata: Any) -> int | None:
        return self.sessions.start_redirect(user_id, stream_url, **metadata)

    def stop_redirect(self, user_id: int, history_id: int) -> bool:
        return self.sessions.stop_redirect(user_id, history_id)

    def content_type_for(self, profile_id: str) -> str:
        return self.resolver.content_type_for(profile_id)

    def list_active_streams(self) -> list[dict[str, Any]]:
        return self.sessions.list_active_streams()

    def add_observer(self, observer: Observer) -> None:
        self.history.add_observer(observer)

    def list_history(self, limit: int = 100, offset: int = 0) -> list[dict[str, Any]]:
        return db.list_history(limit, offset)

    # =========================================================================
    # DVR
    # =========================================================================

    def schedule_job(
        self,
        user_id: int,
        channel_id: str,
        channel_name: str,
        program_title: str,
        program_start: datetime,
        program_stop: datetime,
    ) -> DvrJob:
        return self.dvr.schedule(
            user_id, channel_id, channel_name, program_title, program_start, program_stop
        )

    def schedule_manual_job(
        self, user_id: int, channel_id: str, channel_name: str, start: datetime, end: datetime
    ) -> DvrJob:
        return self.dvr.schedule_manual(user_id, channel_id, channel_name, start, end)

    def cancel_job(self, job_id: int, user_id: int | None = None) -> DvrJob:
        return self.dvr.cancel_job(job_id, user_id)

    def stop_job(self, job_id: int, user_id: int | None = None) -> DvrJob:
        return self.dvr.stop_job(job_id, user_id)

    def reschedule_job(
        self, job_id: int, start: datetime, end: datetime, user_id: int | None = None
    ) -> DvrJob:
        return self.dvr.reschedule_job(job_id, start, end, user_id)

    def delete_job_history(self, job_id: int, user_id: int | None = None) -> None:
        self.dvr.delete_job_history(job_id, user_id)

    def clear_jobs(self, user_id: int) -> int:
        return self.dvr.clear_jobs(user_id)

    def list_jobs(self, filter: JobFilter | None = None) -> list[DvrJob]:
        filter = filter or JobFilter()
        return self.dvr.list_jobs(filter.user_id, filter.status)

    def list_recordings(self, user_id: int | None = None) -> list[DvrRecording]:
        return self.dvr.list_recordings(user_id)

    def delete_recording(self, recording_id: int, user_id: int | None = None) -> None:
        self.dvr.delete_recording(recording_id, user_id)

    def delete_all_recordings(self, user_id: int) -> int:
        return self.dvr.delete_all_recordings(user_id)

    def timeshift_path(self, job_id: int, user_id: int | None = None) -> Path:
        return self.dvr.timeshift_path(job_id, user_id)

    def storage_usage(self) -> StorageUsage:
        return self.dvr.storage_usage()
