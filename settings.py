"""Server settings: defaults, JSON persistence and migration."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import copy
import json
import logging
import pathlib


log = logging.getLogger(__name__)

APP_DIR = pathlib.Path(__file__).parent
CACHE_DIR = APP_DIR / ".cache"
SETTINGS_FILE = CACHE_DIR / "settings.json"

VALID_FFMPEG_LOG_LEVELS = ("debug", "verbose", "info", "warning", "error")
REDIRECT_COMMAND = "redirect"
DEFAULT_USER_AGENT_ID = "default-ua-1724778434000"

_UA = '-user_agent "{userAgent}"'
_RECONNECT = "-reconnect 1 -reconnect_streamed 1 -reconnect_delay_max 5"
_FMP4_FLAGS = "-movflags frag_keyframe+empty_moov+default_base_moof"


def _profile(id_: str, name: str, command: str, is_default: bool = False) -> dict[str, Any]:
    return {"id": id_, "name": name, "command": command, "is_default": is_default}


DEFAULT_SETTINGS: dict[str, Any] = {
    "user_agents": [
        {
            "id": DEFAULT_USER_AGENT_ID,
            "name": "Default",
            "value": "VLC/3.0.20 (Linux; x86_64)",
            "is_default": True,
        },
    ],
    "stream_profiles": [
        _profile("redirect", "Redirect (No Transcoding)", REDIRECT_COMMAND, True),
        _profile(
            "ffmpeg-default",
            "ffmpeg (Built in)",
            f'{_UA} -i "{{streamUrl}}" -c:v libx264 -preset ultrafast -crf 23 '
            "-c:a aac -b:a 128k -f mpegts pipe:1",
        ),
        _profile(
            "ffmpeg-fmp4",
            "ffmpeg fMP4 (CPU)",
            f'{_UA} {_RECONNECT} -i "{{streamUrl}}" -c:v libx264 -preset ultrafast '
            f"-c:a aac -b:a 192k {_FMP4_FLAGS} -f mp4 pipe:1",
        ),
        _profile(
            "ffmpeg-fmp4-nvidia",
            "ffmpeg fMP4 (NVIDIA)",
            f'{_UA} {_RECONNECT} -i "{{streamUrl}}" -c:v h264_nvenc -preset p6 -tune hq '
            f"-c:a aac -b:a 192k {_FMP4_FLAGS} -f mp4 pipe:1",
        ),
        _profile(
            "ffmpeg-nvidia",
            "ffmpeg (NVIDIA NVENC)",
            f'{_UA} -re -i "{{streamUrl}}" -c:v h264_nvenc -preset p6 -tune hq '
            "-c:a copy -f mpegts pipe:1",
        ),
        _profile(
            "ffmpeg-intel",
            "ffmpeg (Intel QSV)",
            '-hwaccel qsv -c:v h264_qsv -i "{streamUrl}" -c:v h264_qsv -preset medium '
            "-c:a aac -b:a 128k -f mpegts pipe:1",
        ),
        _profile(
            "ffmpeg-vaapi",
            "ffmpeg (VA-API) Intel",
            '-hwaccel vaapi -hwaccel_output_format vaapi -i "{streamUrl}" '
            '-vf "format=nv12|vaapi,hwupload" -c:v h264_vaapi -preset medium '
            "-c:a aac -b:a 128k -f mpegts pipe:1",
        ),
    ],
    "cast_profiles": [
        _profile(
            "cast-default",
            "Cast Default (CPU)",
            f'{_UA} -i "{{streamUrl}}" -c:v libx264 -preset veryfast -crf 23 '
            f"-c:a aac -b:a 128k {_FMP4_FLAGS} -f mp4 pipe:1",
            True,
        ),
        _profile(
            "cast-nvidia",
            "Cast (NVIDIA NVENC)",
            f'{_UA} -i "{{streamUrl}}" -c:v h264_nvenc -preset p6 -tune hq '
            f"-c:a aac -b:a 128k {_FMP4_FLAGS} -f mp4 pipe:1",
        ),
    ],
    "dvr": {
        "pre_buffer_minutes": 1,
        "post_buffer_minutes": 2,
        "max_concurrent_recordings": 1,
        "auto_delete_days": 0,
        "active_recording_profile_id": "dvr-ts-default",
        "recording_profiles": [
            _profile(
                "dvr-ts-default",
                "Default TS (Stream Copy, Timeshiftable)",
                f'{_UA} -i "{{streamUrl}}" -c copy -f mpegts "{{filePath}}"',
                True,
            ),
            _profile(
                "dvr-ts-nvidia",
                "NVIDIA NVENC TS (Timeshiftable)",
                f'{_UA} -i "{{streamUrl}}" -c:v h264_nvenc -preset p6 -tune hq '
                '-c:a copy -f mpegts "{filePath}"',
            ),
            _profile(
                "dvr-mp4-default",
                "Legacy MP4 (H.264/AAC)",
                f'{_UA} -i "{{streamUrl}}" -c:v libx264 -preset veryfast -crf 23 '
                '-c:a aac -b:a 128k -movflags +faststart -f mp4 "{filePath}"',
            ),
            _profile(
                "dvr-mp4-vaapi",
                "VA-API MP4 (H.264/AAC)",
                '-hwaccel vaapi -hwaccel_output_format vaapi -i "{streamUrl}" '
                '-vf "format=nv12,hwupload" -c:v h264_vaapi -preset medium '
                '-c:a aac -b:a 128k -movflags +faststart -f mp4 "{filePath}"',
            ),
        ],
    },
    "user_dvr": {},
    "active_stream_profile_id": "redirect",
    "active_cast_profile_id": "cast-default",
    "active_user_agent_id": DEFAULT_USER_AGENT_ID,
    "player_log_level": "warning",
    "dvr_log_level": "warning",
    "dvr_dir": "/dvr",
    "data_dir": "/data",
    "logs": {
        "max_files": 5,
        "max_file_size_bytes": 5 * 1024 * 1024,
    },
}


def default_settings() -> dict[str, Any]:
    """Fresh copy of the built-in defaults."""
    return copy.deepcopy(DEFAULT_SETTINGS)


_load_settings: Callable[[], dict[str, Any]] = default_settings


def init(load_settings: Callable[[], dict[str, Any]]) -> None:
    """Initialize module with settings loader."""
    global _load_settings
    _load_settings = load_settings


def get_settings() -> dict[str, Any]:
    """Get current settings."""
    return _load_settings()


def get_dvr_settings(user_id: int | None = None) -> dict[str, Any]:
    """Global DVR block with the user's overrides merged on top."""
    settings = get_settings()
    merged = dict(settings.get("dvr") or DEFAULT_SETTINGS["dvr"])
    if user_id is not None:
        overrides = (settings.get("user_dvr") or {}).get(str(user_id)) or {}
        merged.update(overrides)
    return merged


# ===========================================================================
# Migration
# ===========================================================================


def _merge_profiles(
    existing: list[dict[str, Any]],
    defaults: list[dict[str, Any]],
    label: str,
) -> bool:
    """Add missing default profiles and refresh commands of default ones."""
    changed = False
    by_id = {p.get("id"): p for p in existing}
    for default in defaults:
        current = by_id.get(default["id"])
        if current is None:
            log.info("Adding missing %s profile: %s", label, default["name"])
            existing.append(copy.deepcopy(default))
            changed = True
        elif current.get("is_default") and current.get("command") != default["command"]:
            log.info("Updating outdated default %s profile command for: %s", label, default["name"])
            current["command"] = default["command"]
            changed = True
    return changed


def migrate(settings: dict[str, Any]) -> bool:
    """Bring a loaded settings dict up to date in place. Returns True if changed."""
    changed = False

    for key, value in DEFAULT_SETTINGS.items():
        if key not in settings or settings[key] is None:
            log.info("Initializing missing setting %s", key)
            settings[key] = copy.deepcopy(value)
            changed = True

    changed |= _merge_profiles(
        settings["stream_profiles"], DEFAULT_SETTINGS["stream_profiles"], "stream"
    )
    changed |= _merge_profiles(
        settings["cast_profiles"], DEFAULT_SETTINGS["cast_profiles"], "cast"
    )

    dvr = settings["dvr"]
    for key, value in DEFAULT_SETTINGS["dvr"].items():
        if key not in dvr:
            dvr[key] = copy.deepcopy(value)
            changed = True
    changed |= _merge_profiles(
        dvr["recording_profiles"], DEFAULT_SETTINGS["dvr"]["recording_profiles"], "recording"
    )

    for key in ("player_log_level", "dvr_log_level"):
        if settings[key] not in VALID_FFMPEG_LOG_LEVELS:
            log.warning(
                "Setting %s=%r is invalid, resetting to %s",
                key,
                settings[key],
                DEFAULT_SETTINGS[key],
            )
            settings[key] = DEFAULT_SETTINGS[key]
            changed = True

    logs = settings["logs"]
    for key, value in DEFAULT_SETTINGS["logs"].items():
        if key not in logs:
            logs[key] = value
            changed = True

    return changed


def load_settings(path: pathlib.Path | None = None) -> dict[str, Any]:
    """Load settings from JSON, creating or migrating the file as needed."""
    settings_file = path or SETTINGS_FILE
    if not settings_file.exists():
        log.info("%s not found, creating default settings", settings_file)
        settings = default_settings()
        save_settings(settings, settings_file)
        return settings
    try:
        settings = json.loads(settings_file.read_text())
    except (OSError, ValueError) as e:
        log.error("Could not parse %s, using defaults: %s", settings_file, e)
        return default_settings()
    if not isinstance(settings, dict):
        log.error("Settings in %s are not an object, using defaults", settings_file)
        return default_settings()
    if migrate(settings):
        log.info("Saving migrated settings to %s", settings_file)
        save_settings(settings, settings_file)
    return settings


def save_settings(settings: dict[str, Any], path: pathlib.Path | None = None) -> None:
    """Write settings JSON."""
    settings_file = path or SETTINGS_FILE
    settings_file.parent.mkdir(parents=True, exist_ok=True)
    settings_file.write_text(json.dumps(settings, indent=2))
