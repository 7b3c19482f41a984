"""Channel lookup by id or stream URL."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

import logging
import re
import threading

from errors import ChannelNotFound


log = logging.getLogger(__name__)

_ATTR_RE = re.compile(r'([\w-]+)="([^"]*)"')


@dataclass(slots=True)
class Channel:
    id: str
    url: str
    name: str
    logo: str = ""
    display_name: str = ""
    group: str = "Uncategorized"

    @property
    def label(self) -> str:
        """Name shown to users: display name if present, else tvg-name."""
        return self.display_name or self.name


def parse_m3u(content: str) -> list[Channel]:
    """Parse #EXTINF entries followed by an http/rtp URL."""
    channels: list[Channel] = []
    lines = content.split("\n")
    unnamed = 0
    i = 0
    while i < len(lines):
        line = lines[i].strip()
        if line.startswith("#EXTINF:") and i + 1 < len(lines):
            url = lines[i + 1].strip()
            if url.startswith(("http", "rtp")):
                attrs = dict(_ATTR_RE.findall(line))
                comma = line.rfind(",")
                display_name = line[comma + 1 :].strip() if comma != -1 else "Unknown"
                channel_id = attrs.get("tvg-id")
                if not channel_id:
                    unnamed += 1
                    channel_id = f"unknown-{unnamed}"
                channels.append(
                    Channel(
                        id=channel_id,
                        url=url,
                        name=attrs.get("tvg-name") or display_name,
                        logo=attrs.get("tvg-logo", ""),
                        display_name=display_name,
                        group=attrs.get("group-title", "Uncategorized"),
                    )
                )
                i += 1
        i += 1
    log.debug("M3U parsed: %d channels (%d without tvg-id)", len(channels), unnamed)
    return channels


class ChannelDirectory:
    """In-memory index of channels by id and by URL."""

    def __init__(self, channels: Iterable[Channel] = ()):
        self._lock = threading.Lock()
        self._by_id: dict[str, Channel] = {}
        self._by_url: dict[str, Channel] = {}
        self.replace(channels)

    @classmethod
    def from_m3u(cls, content: str) -> ChannelDirectory:
        return cls(parse_m3u(content))

    def replace(self, channels: Iterable[Channel]) -> None:
        """Swap in a new channel list (e.g. after a playlist refresh)."""
        by_id: dict[str, Channel] = {}
        by_url: dict[str, Channel] = {}
        for channel in channels:
            # First entry wins on duplicate ids/urls
            by_id.setdefault(channel.id, channel)
            by_url.setdefault(channel.url, channel)
        with self._lock:
            self._by_id = by_id
            self._by_url = by_url

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_id)

    def get(self, channel_id: str) -> Channel | None:
        with self._lock:
            return self._by_id.get(channel_id)

    def resolve(self, channel_id: str) -> Channel:
        """Channel by id. Raises ChannelNotFound."""
        channel = self.get(channel_id)
        if channel is None:
            raise ChannelNotFound(channel_id)
        return channel

    def resolve_by_url(self, url: str) -> Channel | None:
        """Channel whose stream URL is url, or None (e.g. VOD or direct URLs)."""
        with self._lock:
            return self._by_url.get(url)
