"""Stream engine configuration loaded from a ``key = value`` file."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple

from rtsp_bridge.core.config_manager import ConfigManager, get_config_manager
from rtsp_bridge.core.logging_utils import get_module_logger

from .defaults import (
    DEFAULT_ALT_MEDIA_POLL,
    DEFAULT_ALT_MEDIA_WAIT,
    DEFAULT_FFMPEG_PATH,
    DEFAULT_FRAME_BUFFER_LIMIT,
    DEFAULT_LIVE_SOURCE_URL,
    DEFAULT_OVERLAY_LEAD_TIME,
    DEFAULT_OVERLAY_MODE,
    DEFAULT_SETTLE_DELAY,
    DEFAULT_SNAPSHOT_INTERVAL_MS,
    DEFAULT_SNAPSHOT_SIZE,
    DEFAULT_STOP_ATTEMPTS,
    DEFAULT_STOP_RETRY_INTERVAL,
    DEFAULT_STOP_TIMEOUT,
    DEFAULT_TICKET_URL,
)

logger = get_module_logger("StreamConfig")

OVERLAY_MODES = ("video", "frames")


@dataclass(frozen=True)
class StreamConfig:
    ffmpeg_path: str = DEFAULT_FFMPEG_PATH
    snapshot_interval_ms: int = DEFAULT_SNAPSHOT_INTERVAL_MS
    snapshot_size: Tuple[int, int] = DEFAULT_SNAPSHOT_SIZE
    stop_timeout: float = DEFAULT_STOP_TIMEOUT
    overlay_mode: str = DEFAULT_OVERLAY_MODE
    alt_media_wait: float = DEFAULT_ALT_MEDIA_WAIT
    alt_media_poll: float = DEFAULT_ALT_MEDIA_POLL
    overlay_lead_time: float = DEFAULT_OVERLAY_LEAD_TIME
    live_source_url: str = DEFAULT_LIVE_SOURCE_URL
    ticket_url: str = DEFAULT_TICKET_URL
    settle_delay: float = DEFAULT_SETTLE_DELAY
    stop_attempts: int = DEFAULT_STOP_ATTEMPTS
    stop_retry_interval: float = DEFAULT_STOP_RETRY_INTERVAL
    frame_buffer_limit: int = DEFAULT_FRAME_BUFFER_LIMIT

    @property
    def snapshot_interval(self) -> float:
        return self.snapshot_interval_ms / 1000.0

    def live_source_for(self, camera_id: str) -> str:
        return self.live_source_url.format(camera_id=camera_id)


def _parse_size(value: str, default: Tuple[int, int]) -> Tuple[int, int]:
    try:
        width, height = value.lower().split("x", 1)
        size = (int(width), int(height))
    except ValueError:
        logger.warning("Invalid snapshot_size %r, using default %dx%d", value, *default)
        return default
    if size[0] <= 0 or size[1] <= 0:
        logger.warning("Invalid snapshot_size %r, using default %dx%d", value, *default)
        return default
    return size


def stream_config_from_dict(
    raw: Dict[str, str],
    manager: Optional[ConfigManager] = None,
) -> StreamConfig:
    cm = manager or get_config_manager()
    defaults = StreamConfig()

    overlay_mode = cm.get_str(raw, "overlay_mode", defaults.overlay_mode).strip().lower()
    if overlay_mode not in OVERLAY_MODES:
        logger.warning("Unknown overlay_mode %r, using %s", overlay_mode, defaults.overlay_mode)
        overlay_mode = defaults.overlay_mode

    interval_ms = cm.get_int(raw, "snapshot_interval_ms", defaults.snapshot_interval_ms)
    if interval_ms <= 0:
        logger.warning("snapshot_interval_ms must be positive, using %d", defaults.snapshot_interval_ms)
        interval_ms = defaults.snapshot_interval_ms

    stop_attempts = cm.get_int(raw, "stop_attempts", defaults.stop_attempts)
    if stop_attempts < 1:
        stop_attempts = defaults.stop_attempts

    size = defaults.snapshot_size
    if "snapshot_size" in raw:
        size = _parse_size(raw["snapshot_size"], defaults.snapshot_size)

    return StreamConfig(
        ffmpeg_path=cm.get_str(raw, "ffmpeg_path", defaults.ffmpeg_path),
        snapshot_interval_ms=interval_ms,
        snapshot_size=size,
        stop_timeout=cm.get_float(raw, "stop_timeout", defaults.stop_timeout),
        overlay_mode=overlay_mode,
        alt_media_wait=cm.get_float(raw, "alt_media_wait", defaults.alt_media_wait),
        alt_media_poll=cm.get_float(raw, "alt_media_poll", defaults.alt_media_poll),
        overlay_lead_time=cm.get_float(raw, "overlay_lead_time", defaults.overlay_lead_time),
        live_source_url=cm.get_str(raw, "live_source_url", defaults.live_source_url),
        ticket_url=cm.get_str(raw, "ticket_url", defaults.ticket_url),
        settle_delay=cm.get_float(raw, "settle_delay", defaults.settle_delay),
        stop_attempts=stop_attempts,
        stop_retry_interval=cm.get_float(raw, "stop_retry_interval", defaults.stop_retry_interval),
        frame_buffer_limit=cm.get_int(raw, "frame_buffer_limit", defaults.frame_buffer_limit),
    )


async def load_stream_config(config_path: Path) -> StreamConfig:
    """Read ``config_path`` and build a StreamConfig; missing keys use defaults."""
    cm = get_config_manager()
    raw = await cm.read_config_async(Path(config_path))
    return stream_config_from_dict(raw, cm)


__all__ = ["OVERLAY_MODES", "StreamConfig", "load_stream_config", "stream_config_from_dict"]
