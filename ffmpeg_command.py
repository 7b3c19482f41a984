"""FFmpeg command building from user-authored profile templates."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Literal

import logging
import re

import settings as settings_module
from errors import ProfileNotFound, UserAgentNotFound


log = logging.getLogger(__name__)

ProfileKind = Literal["live", "recording"]

# Template placeholders (user-authored config, names must not change)
STREAM_URL = "{streamUrl}"
USER_AGENT = "{userAgent}"
CLIENT_USER_AGENT = "{clientUserAgent}"  # Live-only alias of {userAgent}
FILE_PATH = "{filePath}"
_PLACEHOLDER_RE = re.compile(r"\{(?:streamUrl|userAgent|clientUserAgent|filePath)\}")

_DEFAULT_LOG_LEVEL = "warning"
_MP4_MARKER = "-f mp4"


@dataclass(slots=True)
class Profile:
    id: str
    name: str
    command: str
    is_default: bool = False

    @property
    def is_redirect(self) -> bool:
        return self.command.strip() == settings_module.REDIRECT_COMMAND

    @property
    def is_mp4(self) -> bool:
        return _MP4_MARKER in self.command

    @property
    def content_type(self) -> str:
        return "video/mp4" if self.is_mp4 else "video/mp2t"

    @property
    def file_extension(self) -> str:
        return ".mp4" if self.is_mp4 else ".ts"


@dataclass(slots=True)
class UserAgent:
    id: str
    name: str
    value: str


# ===========================================================================
# Tokenizer
# ===========================================================================


def _strip_quotes(token: str) -> str:
    if token.startswith('"'):
        token = token[1:]
    if token.endswith('"'):
        token = token[:-1]
    return token


def tokenize(command: str) -> list[str]:
    """Split a command template into argv.

    Whitespace separates arguments except inside double quotes, so
    `-vf "scale=1280:720, fps=30"` stays one argument. One leading and one
    trailing quote are stripped from each argument. An unterminated quote is
    dropped and acts as a separator.
    """
    args: list[str] = []
    current: list[str] = []
    i = 0
    n = len(command)
    while i < n:
        ch = command[i]
        if ch == '"':
            end = command.find('"', i + 1)
            if end == -1:
                if current:
                    args.append("".join(current))
                    current = []
                i += 1
                continue
            current.append(command[i : end + 1])
            i = end + 1
        elif ch.isspace():
            if current:
                args.append("".join(current))
                current = []
            i += 1
        else:
            current.append(ch)
            i += 1
    if current:
        args.append("".join(current))
    return [_strip_quotes(a) for a in args]


def substitute(args: list[str], values: dict[str, str]) -> list[str]:
    """Replace placeholders inside already-tokenized arguments.

    Substituting after tokenizing means a value containing spaces or quotes
    can never turn into extra arguments. Single pass, so a value that itself
    contains a placeholder is left alone. Placeholders missing from values
    are kept verbatim.
    """
    return [_PLACEHOLDER_RE.sub(lambda m: values.get(m.group(0), m.group(0)), a) for a in args]


# ===========================================================================
# Profile Resolution
# ===========================================================================


def _to_profile(raw: dict[str, Any]) -> Profile:
    return Profile(
        id=str(raw.get("id", "")),
        name=str(raw.get("name", "")),
        command=str(raw.get("command", "")),
        is_default=bool(raw.get("is_default", False)),
    )


class ProfileResolver:
    """Resolves profile ids to templates and builds ffmpeg argv."""

    def __init__(self, get_settings: Callable[[], dict[str, Any]] | None = None):
        self._get_settings = get_settings or settings_module.get_settings

    def _profiles(self, kind: ProfileKind) -> list[dict[str, Any]]:
        s = self._get_settings()
        if kind == "recording":
            return list((s.get("dvr") or {}).get("recording_profiles") or [])
        # Cast profiles live alongside stream profiles for lookup
        return list(s.get("stream_profiles") or []) + list(s.get("cast_profiles") or [])

    def get_profile(self, kind: ProfileKind, profile_id: str | None) -> Profile:
        """Get profile by id. Raises ProfileNotFound."""
        for raw in self._profiles(kind):
            if raw.get("id") == profile_id:
                return _to_profile(raw)
        raise ProfileNotFound(kind, profile_id)

    def get_user_agent(self, user_agent_id: str | None) -> UserAgent:
        """Get user agent by id. Raises UserAgentNotFound."""
        for raw in self._get_settings().get("user_agents") or []:
            if raw.get("id") == user_agent_id:
                return UserAgent(
                    id=str(raw["id"]),
                    name=str(raw.get("name", "")),
                    value=str(raw.get("value", "")),
                )
        raise UserAgentNotFound(user_agent_id)

    def content_type_for(self, profile_id: str | None) -> str:
        """Content-Type a live profile produces. Raises ProfileNotFound."""
        return self.get_profile("live", profile_id).content_type

    def _ffmpeg_binary(self) -> str:
        return str(self._get_settings().get("ffmpeg_path") or "ffmpeg")

    def _log_level(self, key: str) -> str:
        level = self._get_settings().get(key, _DEFAULT_LOG_LEVEL)
        if level not in settings_module.VALID_FFMPEG_LOG_LEVELS:
            return _DEFAULT_LOG_LEVEL
        return level

    def build_live_cmd(self, profile: Profile, stream_url: str, user_agent: UserAgent) -> list[str]:
        """Build argv for a live relay/transcode writing to stdout."""
        args = substitute(
            tokenize(profile.command),
            {
                STREAM_URL: stream_url,
                USER_AGENT: user_agent.value,
                CLIENT_USER_AGENT: user_agent.value,
            },
        )
        level = self._log_level("player_log_level")
        return [self._ffmpeg_binary(), "-v", f"level+{level}", *args]

    def build_recording_cmd(
        self,
        profile: Profile,
        stream_url: str,
        user_agent: UserAgent,
        file_path: str,
    ) -> list[str]:
        """Build argv for a recording writing to file_path."""
        args = substitute(
            tokenize(profile.command),
            {
                STREAM_URL: stream_url,
                USER_AGENT: user_agent.value,
                FILE_PATH: file_path,
            },
        )
        level = self._log_level("dvr_log_level")
        return [self._ffmpeg_binary(), "-v", f"level+{level}", *args]
