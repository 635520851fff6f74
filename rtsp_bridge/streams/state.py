from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Callable, List

if TYPE_CHECKING:
    from .process import ProcessHandle


class StreamType(Enum):
    LIVE = "live"
    SNAPSHOT = "snapshot"
    EVENT = "event"


class StreamStatus(Enum):
    INACTIVE = "inactive"
    STARTING = "starting"
    ACTIVE = "active"
    STOPPING = "stopping"
    FAILED = "failed"

    @property
    def published(self) -> str:
        """Value reported to the device layer: inactive, active or failed."""
        if self in (StreamStatus.ACTIVE, StreamStatus.FAILED):
            return self.value
        return StreamStatus.INACTIVE.value

    @property
    def terminal(self) -> bool:
        return self in (StreamStatus.INACTIVE, StreamStatus.FAILED)


@dataclass
class StreamSession:
    """Bookkeeping for one running stream of a camera."""

    type: StreamType
    status: StreamStatus = StreamStatus.STARTING
    handles: List["ProcessHandle"] = field(default_factory=list)
    started_at: float = field(default_factory=time.time)

    def attach(self, handle: "ProcessHandle") -> None:
        if handle not in self.handles:
            self.handles.append(handle)

    def detach(self, handle: "ProcessHandle") -> None:
        if handle in self.handles:
            self.handles.remove(handle)

    @property
    def live_handles(self) -> List["ProcessHandle"]:
        return [handle for handle in self.handles if handle.is_running()]


StatusCallback = Callable[[], None]


__all__ = ["StatusCallback", "StreamSession", "StreamStatus", "StreamType"]
