"""Live, snapshot and event stream engines and the plumbing they share."""

from .config import OVERLAY_MODES, StreamConfig, load_stream_config, stream_config_from_dict
from .errors import ProcessSpawnError, StreamError, TicketError, TicketForbiddenError, TicketRequestError
from .event import EventRecording, EventSessionEngine
from .frame_parser import FrameBoundaryParser
from .live import AltMediaRelay, LiveSessionController, TicketClient
from .process import PipeRelay, ProcessHandle, TranscodeArgs, spawn_process, stop_process
from .protocol import AltMediaDescriptor, MediaOffer, StreamData, WorkerCommand, WorkerEvent, WorkerState
from .registry import CameraContext, StreamSessionRegistry
from .signaling import CameraInfo, EventHook, SessionFactory, StreamingSession
from .snapshot import SnapshotSessionEngine
from .state import StreamSession, StreamStatus, StreamType
from .worker import SignalingWorker, WorkerThread

__all__ = [
    "AltMediaDescriptor",
    "AltMediaRelay",
    "CameraContext",
    "CameraInfo",
    "EventHook",
    "EventRecording",
    "EventSessionEngine",
    "FrameBoundaryParser",
    "LiveSessionController",
    "MediaOffer",
    "OVERLAY_MODES",
    "PipeRelay",
    "ProcessHandle",
    "ProcessSpawnError",
    "SessionFactory",
    "SignalingWorker",
    "SnapshotSessionEngine",
    "StreamConfig",
    "StreamData",
    "StreamError",
    "StreamSession",
    "StreamSessionRegistry",
    "StreamStatus",
    "StreamType",
    "StreamingSession",
    "TicketClient",
    "TicketError",
    "TicketForbiddenError",
    "TicketRequestError",
    "TranscodeArgs",
    "WorkerCommand",
    "WorkerEvent",
    "WorkerState",
    "WorkerThread",
    "load_stream_config",
    "spawn_process",
    "stop_process",
    "stream_config_from_dict",
]
