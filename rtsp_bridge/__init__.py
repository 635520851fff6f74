"""Stream session engine bridging cloud camera sources to RTSP."""

from __future__ import annotations

from importlib import metadata

from .streams import StreamConfig, StreamSessionRegistry, StreamStatus, StreamType, load_stream_config

try:
    __version__ = metadata.version("rtsp-bridge")
except metadata.PackageNotFoundError:  # pragma: no cover - local dev
    __version__ = "0.0.0"


__all__ = [
    "StreamConfig",
    "StreamSessionRegistry",
    "StreamStatus",
    "StreamType",
    "__version__",
    "load_stream_config",
]
