"""Stream history log and live-activity observers."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import logging
import sqlite3
import threading

import db


log = logging.getLogger(__name__)

Observer = Callable[[list[dict[str, Any]]], Any]


class HistoryRecorder:
    """Append-only start/stop events for streams.

    Writes are fire-and-forget: a failing write is logged and returns None
    so stream paths never see persistence errors.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None):
        self._clock = clock or (lambda: datetime.now(UTC))
        self._observers: list[Observer] = []
        self._lock = threading.Lock()

    def now(self) -> datetime:
        return self._clock()

    def record_start(
        self,
        user_id: int | None,
        channel_name: str,
        *,
        username: str = "",
        channel_id: str | None = None,
        channel_logo: str | None = None,
        profile_name: str = "",
        client_ip: str | None = None,
        started_at: datetime | None = None,
    ) -> int | None:
        """Insert a 'playing' row. Returns its id, or None if the write failed."""
        try:
            history_id = db.insert_history(
                user_id=user_id,
                username=username,
                channel_id=channel_id,
                channel_name=channel_name,
                channel_logo=channel_logo,
                stream_profile_name=profile_name,
                client_ip=client_ip,
                start_time=started_at or self.now(),
            )
        except (sqlite3.Error, RuntimeError) as e:
            log.error("Failed to record stream start for user %s: %s", user_id, e)
            return None
        log.info("History %s: user %s started %s", history_id, user_id, channel_name)
        return history_id

    def record_stop(self, history_id: int | None, started_at: datetime) -> None:
        """Close a history row with its duration. Unknown or closed ids are ignored."""
        if history_id is None:
            return
        ended_at = self.now()
        duration = max(0, round((ended_at - started_at).total_seconds()))
        try:
            if db.finish_history(history_id, ended_at, duration):
                log.info("History %s: stopped after %ss", history_id, duration)
        except (sqlite3.Error, RuntimeError) as e:
            log.error("Failed to record stream stop for history %s: %s", history_id, e)

    def lookup_start(self, history_id: int, user_id: int | None = None) -> datetime | None:
        """Start time of a history row owned by user_id, or None."""
        try:
            row = db.get_history(history_id)
        except (sqlite3.Error, RuntimeError) as e:
            log.error("Failed to read history %s: %s", history_id, e)
            return None
        if row is None or (user_id is not None and row["user_id"] != user_id):
            return None
        return db.from_iso(row["start_time"])

    # =========================================================================
    # Observers
    # =========================================================================

    def add_observer(self, observer: Observer) -> None:
        with self._lock:
            self._observers.append(observer)

    def remove_observer(self, observer: Observer) -> None:
        with self._lock:
            if observer in self._observers:
                self._observers.remove(observer)

    def notify_observers(self, snapshot: list[dict[str, Any]]) -> None:
        """Push the live-activity snapshot to every observer."""
        with self._lock:
            observers = list(self._observers)
        for observer in observers:
            try:
                observer(snapshot)
            except Exception:
                log.exception("Activity observer failed")
