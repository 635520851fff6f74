from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class WorkerState(Enum):
    IDLE = "idle"
    STARTING = "starting"
    ACTIVE = "active"
    INACTIVE = "inactive"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class AltMediaDescriptor:
    """Negotiated transport for the passively consumable copy of a live call.

    The media arrives on ``port`` and RTCP on ``port + 1``.
    """
    port: int
    session_description: str

    def __post_init__(self) -> None:
        if not 0 < self.port < 65535:
            raise ValueError(f"Alt media port out of range: {self.port}")

    @property
    def control_port(self) -> int:
        return self.port + 1


@dataclass(frozen=True, slots=True)
class MediaOffer:
    """What a negotiated session hands to the live transcoder."""
    session_description: str  # SDP fed to ffmpeg on stdin
    alt_media: Optional[AltMediaDescriptor] = None


# --- Commands (controller → worker) ---

@dataclass(frozen=True, slots=True)
class StreamData:
    ticket: str
    publish_url: str


@dataclass(frozen=True, slots=True)
class WorkerCommand:
    command: str  # "start" or "stop"
    stream_data: Optional[StreamData] = None

    @classmethod
    def start(cls, ticket: str, publish_url: str) -> "WorkerCommand":
        return cls("start", StreamData(ticket=ticket, publish_url=publish_url))

    @classmethod
    def stop(cls) -> "WorkerCommand":
        return cls("stop")


# --- Events (worker → controller) ---

EVENT_STATE = "state"
EVENT_LOG_INFO = "log_info"
EVENT_LOG_ERROR = "log_error"


@dataclass(frozen=True, slots=True)
class WorkerEvent:
    type: str
    data: Any
    extra: Optional[AltMediaDescriptor] = None

    @classmethod
    def state(cls, state: WorkerState, extra: Optional[AltMediaDescriptor] = None) -> "WorkerEvent":
        return cls(EVENT_STATE, state.value, extra)

    @classmethod
    def log_info(cls, message: str) -> "WorkerEvent":
        return cls(EVENT_LOG_INFO, message)

    @classmethod
    def log_error(cls, message: str) -> "WorkerEvent":
        return cls(EVENT_LOG_ERROR, message)

    @property
    def is_state(self) -> bool:
        return self.type == EVENT_STATE
