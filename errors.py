"""Errors raised by the stream and DVR engines."""

from __future__ import annotations

from typing import Any

from fastapi import HTTPException


class ProfileNotFound(HTTPException):
    def __init__(self, kind: str, profile_id: str | None):
        self.kind = kind
        self.profile_id = profile_id
        label = "Recording" if kind == "recording" else "Stream"
        super().__init__(404, f'{label} profile with ID "{profile_id}" not found.')


class UserAgentNotFound(HTTPException):
    def __init__(self, user_agent_id: str | None):
        self.user_agent_id = user_agent_id
        super().__init__(404, f'User agent with ID "{user_agent_id}" not found.')


class ChannelNotFound(HTTPException):
    def __init__(self, channel_id: str | None):
        self.channel_id = channel_id
        super().__init__(404, f"Channel ID {channel_id} not found.")


class StreamNotFound(HTTPException):
    def __init__(self, stream_key: str):
        self.stream_key = stream_key
        super().__init__(404, "Active stream not found.")


class JobNotFound(HTTPException):
    def __init__(self, job_id: int):
        self.job_id = job_id
        super().__init__(404, "Job not found or unauthorized.")


class RecordingNotFound(HTTPException):
    def __init__(self, recording_id: int):
        self.recording_id = recording_id
        super().__init__(404, "Recording not found or not authorized.")


class RecordingFileMissing(HTTPException):
    def __init__(self, path: str | None):
        self.path = path
        super().__init__(404, "Recording file not found on disk.")


class InvalidJobState(HTTPException):
    def __init__(self, job_id: int, status: str, detail: str):
        self.job_id = job_id
        self.status = status
        super().__init__(400, detail)


class PastScheduleError(HTTPException):
    def __init__(self, job_id: int | None = None):
        self.job_id = job_id
        super().__init__(400, "Job was scheduled for a time in the past.")


class SpawnFailed(HTTPException):
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(500, f"Failed to start ffmpeg process: {reason}")


class ConflictError(HTTPException):
    """Scheduling would exceed the concurrent recording limit."""

    def __init__(self, conflicting_jobs: list[Any], new_job: Any = None):
        self.conflicting_jobs = conflicting_jobs
        self.new_job = new_job
        super().__init__(409, "Recording conflict detected.")


class FileTooSmallError(Exception):
    """Recording output missing or at/below the minimum size.

    Internal classification only; it ends up as the job's error message.
    """

    def __init__(self, path: str, size: int | None):
        self.path = path
        self.size = size
        super().__init__(f"Recording file {path} too small ({size} bytes)")
