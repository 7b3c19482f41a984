"""Live stream session lifecycle: sharing, teardown and inactivity cleanup."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import asyncio
import logging
import threading
import time

from channels import ChannelDirectory
from db import to_iso
from errors import StreamNotFound
from ffmpeg_command import ProfileResolver
from ffmpeg_process import OutputConsumer, ProcessExited, ProcessRunner, RunningProcess
from history import HistoryRecorder
from timers import Scheduler


log = logging.getLogger(__name__)

# Timing constants
JANITOR_INTERVAL_SEC = 60.0
INACTIVITY_TIMEOUT_SEC = 30.0

REDIRECT_PROFILE_NAME = "Redirect"
_DIRECT_STREAM_NAME = "Direct Stream"


@dataclass(frozen=True, slots=True)
class StreamKey:
    """Identity of a live session: one process per (user, url, profile)."""

    user_id: int
    stream_url: str
    profile_id: str

    def __str__(self) -> str:
        return f"{self.user_id}::{self.stream_url}::{self.profile_id}"


@dataclass(slots=True)
class StreamSession:
    key: StreamKey
    process: RunningProcess
    started_at: datetime
    last_access: float
    content_type: str
    reference_count: int = 1
    history_id: int | None = None
    username: str = ""
    channel_id: str | None = None
    channel_name: str = ""
    channel_logo: str | None = None
    profile_name: str = ""
    client_ip: str | None = None


@dataclass(slots=True)
class _RedirectActivity:
    user_id: int
    history_id: int
    started_at: datetime
    username: str = ""
    channel_id: str | None = None
    channel_name: str = ""
    channel_logo: str | None = None
    client_ip: str | None = None

    @property
    def stream_key(self) -> str:
        return f"{self.user_id}::{self.history_id}"


class StreamHandle:
    """One client's tap on a shared session's output.

    close() detaches from the session exactly once, however often it is called.
    """

    def __init__(self, manager: StreamSessionManager, key: StreamKey, consumer: OutputConsumer):
        self._manager = manager
        self._consumer = consumer
        self._closed = False
        self.key = key

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def dropped_chunks(self) -> int:
        return self._consumer.dropped

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._consumer.close()
        self._manager.detach(self.key)

    async def __aiter__(self) -> AsyncIterator[bytes]:
        async for chunk in self._consumer:
            yield chunk

    def __enter__(self) -> StreamHandle:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


@dataclass(slots=True)
class AttachResult:
    is_redirect: bool
    content_type: str
    redirect_url: str | None = None
    handle: StreamHandle | None = None


@dataclass(slots=True)
class StopResult:
    stopped: bool
    message: str
    stream_key: str | None = None


# ===========================================================================
# Session Manager
# ===========================================================================


class StreamSessionManager:
    """Owns the live session table.

    The table is guarded by one lock; attach additionally serializes
    check-and-spawn so concurrent attaches for a key start one process.

    The spawn lock is table-wide, not per key: a slow spawn holds up new
    sessions for every other key too. Joining a session that already
    exists never takes it.
    """

    def __init__(
        self,
        resolver: ProfileResolver,
        runner: ProcessRunner,
        history: HistoryRecorder,
        channels: ChannelDirectory,
        clock: Callable[[], float] = time.time,
    ):
        self._resolver = resolver
        self._runner = runner
        self._history = history
        self._channels = channels
        self._clock = clock
        self._sessions: dict[StreamKey, StreamSession] = {}
        self._redirects: dict[str, _RedirectActivity] = {}
        self._lock = threading.Lock()
        self._attach_lock = asyncio.Lock()

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_session(self, key: StreamKey) -> StreamSession | None:
        with self._lock:
            return self._sessions.get(key)

    @property
    def session_count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def list_active_streams(self) -> list[dict[str, Any]]:
        """Snapshot of transcoded and redirect activity for admin views."""
        with self._lock:
            transcoded = [
                {
                    "stream_key": str(s.key),
                    "user_id": s.key.user_id,
                    "username": s.username,
                    "channel_name": s.channel_name,
                    "channel_logo": s.channel_logo,
                    "stream_profile_name": s.profile_name,
                    "start_time": to_iso(s.started_at),
                    "client_ip": s.client_ip,
                    "reference_count": s.reference_count,
                    "is_transcoded": True,
                }
                for s in self._sessions.values()
            ]
            redirects = [
                {
                    "stream_key": r.stream_key,
                    "user_id": r.user_id,
                    "username": r.username,
                    "channel_name": r.channel_name,
                    "channel_logo": r.channel_logo,
                    "stream_profile_name": REDIRECT_PROFILE_NAME,
                    "start_time": to_iso(r.started_at),
                    "client_ip": r.client_ip,
                    "reference_count": 1,
                    "is_transcoded": False,
                }
                for r in self._redirects.values()
            ]
        return transcoded + redirects

    def _notify(self) -> None:
        self._history.notify_observers(self.list_active_streams())

    # -------------------------------------------------------------------------
    # Attach / Detach
    # -------------------------------------------------------------------------

    def _tap_existing(self, key: StreamKey) -> AttachResult | None:
        with self._lock:
            session = self._sessions.get(key)
            if session is None or not session.process.is_alive:
                return None
            session.reference_count += 1
            session.last_access = self._clock()
            consumer = session.process.add_consumer()
            refs = session.reference_count
            content_type = session.content_type
        log.info("Existing stream requested. Key: %s. New ref count: %d", key, refs)
        return AttachResult(
            is_redirect=False,
            content_type=content_type,
            handle=StreamHandle(self, key, consumer),
        )

    def _describe(
        self, stream_url: str, vod_name: str | None, vod_logo: str | None
    ) -> tuple[str | None, str, str | None]:
        """(channel_id, channel_name, channel_logo) for history."""
        if vod_name:
            return None, vod_name, vod_logo
        channel = self._channels.resolve_by_url(stream_url)
        if channel is None:
            return None, _DIRECT_STREAM_NAME, None
        return channel.id, channel.label, channel.logo or None

    async def attach(
        self,
        user_id: int,
        stream_url: str,
        profile_id: str,
        user_agent_id: str | None,
        *,
        username: str = "",
        client_ip: str | None = None,
        vod_name: str | None = None,
        vod_logo: str | None = None,
    ) -> AttachResult:
        """Join or start the session for (user, url, profile).

        Raises ProfileNotFound, UserAgentNotFound or SpawnFailed.
        """
        key = StreamKey(user_id, stream_url, profile_id)
        existing = self._tap_existing(key)
        if existing:
            return existing

        profile = self._resolver.get_profile("live", profile_id)
        if profile.is_redirect:
            log.info("Redirecting user %s to stream URL: %s", user_id, stream_url)
            return AttachResult(
                is_redirect=True, content_type=profile.content_type, redirect_url=stream_url
            )
        user_agent = self._resolver.get_user_agent(user_agent_id)

        async with self._attach_lock:
            # Another attach may have started it while we waited
            existing = self._tap_existing(key)
            if existing:
                return existing

            log.info("Using profile=%r (id=%s), user agent=%r", profile.name, profile.id, user_agent.name)
            cmd = self._resolver.build_live_cmd(profile, stream_url, user_agent)
            process = await self._runner.spawn(cmd, label=str(key), capture_stdout=True)

            channel_id, channel_name, channel_logo = self._describe(stream_url, vod_name, vod_logo)
            started_at = self._history.now()
            history_id = self._history.record_start(
                user_id,
                channel_name,
                username=username,
                channel_id=channel_id,
                channel_logo=channel_logo,
                profile_name=profile.name,
                client_ip=client_ip,
                started_at=started_at,
            )
            session = StreamSession(
                key=key,
                process=process,
                started_at=started_at,
                last_access=self._clock(),
                content_type=profile.content_type,
                history_id=history_id,
                username=username,
                channel_id=channel_id,
                channel_name=channel_name,
                channel_logo=channel_logo,
                profile_name=profile.name,
                client_ip=client_ip,
            )
            consumer = process.add_consumer()
            with self._lock:
                stale = self._sessions.get(key)
                self._sessions[key] = session
            if stale is not None:
                # Its process died but the exit callback has not run yet
                self._history.record_stop(stale.history_id, stale.started_at)
            process.add_exit_callback(lambda exit_: self._on_exit(key, process, exit_))

        log.info("Started ffmpeg pid=%s for stream key: %s", process.pid, key)
        self._notify()
        return AttachResult(
            is_redirect=False,
            content_type=profile.content_type,
            handle=StreamHandle(self, key, consumer),
        )

    def detach(self, key: StreamKey) -> None:
        """Drop one reference. Never kills; the janitor reaps idle sessions."""
        with self._lock:
            session = self._sessions.get(key)
            if session is None:
                log.debug("Detach for %s, but no session was found", key)
                return
            session.reference_count = max(0, session.reference_count - 1)
            session.last_access = self._clock()
            refs = session.reference_count
        if refs <= 0:
            log.info("Last client disconnected from %s, leaving it to the janitor", key)
        else:
            log.info("Client detached from %s. Ref count: %d", key, refs)

    def touch(self, key: StreamKey) -> bool:
        with self._lock:
            session = self._sessions.get(key)
            if session is None:
                return False
            session.last_access = self._clock()
            return True

    # -------------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------------

    def _on_exit(self, key: StreamKey, process: RunningProcess, exit_: ProcessExited) -> None:
        with self._lock:
            session = self._sessions.get(key)
            # Already torn down, or the key now belongs to a newer process
            if session is None or session.process is not process:
                return
            del self._sessions[key]
        log.info("ffmpeg process for %s exited with code %s", key, exit_.code)
        self._history.record_stop(session.history_id, session.started_at)
        self._notify()

    def _terminate(self, session: StreamSession, reason: str) -> None:
        """Kill an already-unregistered session and finalize its history."""
        if session.process.kill():
            log.info("%s: killed ffmpeg pid=%s for %s", reason, session.process.pid, session.key)
        else:
            log.warning("%s: could not kill process for %s, it may have exited", reason, session.key)
        self._history.record_stop(session.history_id, session.started_at)

    def _find_key(self, user_id: int, stream_url: str, profile_id: str | None) -> StreamKey | None:
        if profile_id:
            return StreamKey(user_id, stream_url, profile_id)
        for key in self._sessions:
            if key.user_id == user_id and key.stream_url == stream_url:
                return key
        return None

    def stop(self, user_id: int, stream_url: str, profile_id: str | None = None) -> StopResult:
        """Client-requested stop. Kept alive while other clients hold references."""
        with self._lock:
            key = self._find_key(user_id, stream_url, profile_id)
            session = self._sessions.get(key) if key else None
            if session is None:
                log.info("Stop requested by user %s but no active stream for %s", user_id, stream_url)
                return StopResult(stopped=False, message="No active stream to stop.")
            if session.reference_count > 1:
                log.info(
                    "Stream %s has %d active references, not terminating",
                    key,
                    session.reference_count,
                )
                return StopResult(
                    stopped=False,
                    message="Stream kept alive for other active clients.",
                    stream_key=str(key),
                )
            del self._sessions[key]
        self._terminate(session, "Stop")
        self._notify()
        return StopResult(
            stopped=True, message=f"Stream process for {key} terminated.", stream_key=str(key)
        )

    def admin_stop(self, stream_key: str) -> StopResult:
        """Force-terminate by key regardless of references. Raises StreamNotFound."""
        with self._lock:
            key = next((k for k in self._sessions if str(k) == stream_key), None)
            if key is None:
                raise StreamNotFound(stream_key)
            session = self._sessions.pop(key)
        self._terminate(session, "Admin stop")
        self._notify()
        return StopResult(
            stopped=True,
            message=f"Stream terminated for user {session.username or session.key.user_id}.",
            stream_key=stream_key,
        )

    def reap_idle(self, timeout: float = INACTIVITY_TIMEOUT_SEC) -> list[StreamKey]:
        """Terminate unreferenced sessions idle longer than timeout."""
        now = self._clock()
        with self._lock:
            expired = [
                s
                for s in self._sessions.values()
                if s.reference_count <= 0 and now - s.last_access > timeout
            ]
            for session in expired:
                del self._sessions[session.key]
        for session in expired:
            log.info("Found stale stream process for key: %s", session.key)
            self._terminate(session, "Janitor")
        if expired:
            self._notify()
        return [s.key for s in expired]

    def shutdown(self) -> None:
        """Kill all running ffmpeg processes for clean shutdown."""
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            self._terminate(session, "Shutdown")

    # -------------------------------------------------------------------------
    # Redirect Activity
    # -------------------------------------------------------------------------

    def start_redirect(
        self,
        user_id: int,
        stream_url: str,
        *,
        username: str = "",
        channel_id: str | None = None,
        channel_name: str | None = None,
        channel_logo: str | None = None,
        client_ip: str | None = None,
    ) -> int | None:
        """Track a client playing a URL directly. Returns the history id."""
        if channel_name is None:
            channel_id, channel_name, channel_logo = self._describe(stream_url, None, None)
        started_at = self._history.now()
        history_id = self._history.record_start(
            user_id,
            channel_name,
            username=username,
            channel_id=channel_id,
            channel_logo=channel_logo,
            profile_name=REDIRECT_PROFILE_NAME,
            client_ip=client_ip,
            started_at=started_at,
        )
        if history_id is None:
            return None
        activity = _RedirectActivity(
            user_id=user_id,
            history_id=history_id,
            started_at=started_at,
            username=username,
            channel_id=channel_id,
            channel_name=channel_name,
            channel_logo=channel_logo,
            client_ip=client_ip,
        )
        with self._lock:
            self._redirects[activity.stream_key] = activity
        log.info("Tracking redirect stream for user %s with history ID: %s", user_id, history_id)
        self._notify()
        return history_id

    def stop_redirect(self, user_id: int, history_id: int) -> bool:
        """Finish a redirect activity. Returns False if no history row matched."""
        with self._lock:
            activity = self._redirects.pop(f"{user_id}::{history_id}", None)
        if activity is not None:
            self._notify()
            started_at = activity.started_at
        else:
            started_at = self._history.lookup_start(history_id, user_id)
            if started_at is None:
                return False
        self._history.record_stop(history_id, started_at)
        return True


# ===========================================================================
# Inactivity Janitor
# ===========================================================================


class InactivityJanitor:
    """Periodically reaps sessions nobody is watching."""

    TIMER_KEY = "stream-janitor"

    def __init__(
        self,
        manager: StreamSessionManager,
        scheduler: Scheduler,
        interval: float = JANITOR_INTERVAL_SEC,
        timeout: float = INACTIVITY_TIMEOUT_SEC,
    ):
        self._manager = manager
        self._scheduler = scheduler
        self.interval = interval
        self.timeout = timeout

    def sweep(self) -> list[StreamKey]:
        log.debug("Running cleanup for inactive streams (%d active)", self._manager.session_count)
        return self._manager.reap_idle(self.timeout)

    def start(self) -> None:
        self._scheduler.every(self.TIMER_KEY, self.interval, self.sweep)

    def stop(self) -> None:
        self._scheduler.cancel(self.TIMER_KEY)
