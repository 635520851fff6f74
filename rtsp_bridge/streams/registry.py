"""Per-camera composition of the live, snapshot and event stream engines."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Union

from rtsp_bridge.core.asyncio_utils import cancel_tasks, create_logged_task
from rtsp_bridge.core.logging_utils import get_module_logger

from .config import StreamConfig
from .event import EventRecording, EventSessionEngine
from .live import LiveSessionController, TicketClient
from .process import ProcessFactory
from .signaling import CameraInfo, SessionFactory
from .snapshot import SnapshotSessionEngine
from .state import StreamSession, StreamStatus, StreamType

logger = get_module_logger("StreamRegistry")


def _no_image() -> Optional[bytes]:
    return None


def _no_recording() -> Optional[EventRecording]:
    return None


@dataclass
class CameraContext:
    """What the device layer exposes to its stream engines."""

    camera_id: str
    name: str
    publish_stream_state: Callable[[], None]
    snapshot_image: Callable[[], Optional[bytes]] = _no_image
    event_recording: Callable[[], Optional[EventRecording]] = _no_recording
    hevc_enabled: Union[bool, Callable[[], bool]] = False
    refresh_snapshot: Optional[Callable[[], Any]] = None

    @property
    def info(self) -> CameraInfo:
        return CameraInfo(camera_id=self.camera_id, name=self.name)


class StreamSessionRegistry:
    def __init__(
        self,
        camera: CameraContext,
        *,
        session_factory: SessionFactory,
        ticket_client: Optional[TicketClient] = None,
        config: Optional[StreamConfig] = None,
        process_factory: Optional[ProcessFactory] = None,
    ) -> None:
        self.camera = camera
        self.config = config or StreamConfig()
        self.logger = logger.getChild(camera.camera_id)
        self._session_factory = session_factory
        self._owns_ticket_client = ticket_client is None
        self._ticket_client = ticket_client or TicketClient(url=self.config.ticket_url)
        self._process_factory = process_factory

        self._live: Optional[LiveSessionController] = None
        self._snapshot: Optional[SnapshotSessionEngine] = None
        self._event: Optional[EventSessionEngine] = None
        self._overlay_tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------ engines

    @property
    def live(self) -> LiveSessionController:
        if self._live is None:
            self._live = LiveSessionController(
                self.camera.info,
                self._session_factory,
                self._ticket_client,
                self.camera.publish_stream_state,
                self.config,
                process_factory=self._process_factory,
            )
        return self._live

    @property
    def snapshot(self) -> SnapshotSessionEngine:
        if self._snapshot is None:
            self._snapshot = SnapshotSessionEngine(
                self.camera.camera_id,
                self.camera.snapshot_image,
                self.camera.publish_stream_state,
                self.config,
                live=self.live,
                refresh_snapshot=self.camera.refresh_snapshot,
                process_factory=self._process_factory,
            )
        return self._snapshot

    @property
    def event(self) -> EventSessionEngine:
        if self._event is None:
            self._event = EventSessionEngine(
                self.camera.camera_id,
                self.camera.event_recording,
                self.camera.publish_stream_state,
                self.config,
                hevc_enabled=self.camera.hevc_enabled,
                process_factory=self._process_factory,
            )
        return self._event

    def engine(self, stream_type: Union[StreamType, str]):
        kind = StreamType(stream_type)
        if kind is StreamType.LIVE:
            return self.live
        if kind is StreamType.SNAPSHOT:
            return self.snapshot
        return self.event

    def _existing(self, kind: StreamType):
        return {
            StreamType.LIVE: self._live,
            StreamType.SNAPSHOT: self._snapshot,
            StreamType.EVENT: self._event,
        }[kind]

    # ------------------------------------------------------------------ operations

    async def start(self, stream_type: Union[StreamType, str], publish_url: str) -> None:
        kind = StreamType(stream_type)
        self.logger.debug("Starting %s stream to %s", kind.value, publish_url)
        await self.engine(kind).start(publish_url)

    async def stop(self, stream_type: Union[StreamType, str]) -> None:
        engine = self._existing(StreamType(stream_type))
        if engine is not None:
            await engine.stop()

    async def stop_all(self) -> None:
        await cancel_tasks(list(self._overlay_tasks), logger=self.logger)
        engines = [engine for engine in (self._snapshot, self._event, self._live) if engine is not None]
        results = await asyncio.gather(*(engine.stop() for engine in engines), return_exceptions=True)
        for engine, result in zip(engines, results):
            if isinstance(result, Exception):
                self.logger.error("Error stopping %s: %s", type(engine).__name__, result)

    def status(self, stream_type: Union[StreamType, str]) -> str:
        engine = self._existing(StreamType(stream_type))
        if engine is None:
            return StreamStatus.INACTIVE.value
        return engine.status.published

    def statuses(self) -> Dict[str, str]:
        return {kind.value: self.status(kind) for kind in StreamType}

    def session(self, stream_type: Union[StreamType, str]) -> Optional[StreamSession]:
        engine = self._existing(StreamType(stream_type))
        return engine.session if engine is not None else None

    def start_overlay(self, duration: float) -> Optional[asyncio.Task]:
        """Run a live overlay on the snapshot stream in the background."""
        if self._snapshot is None or self._snapshot.status is not StreamStatus.ACTIVE:
            self.logger.warning("Live snapshot overlay requested without an active snapshot stream")
            return None
        return create_logged_task(
            self._snapshot.start_overlay(duration),
            logger=self.logger,
            context=f"snapshot-overlay-{self.camera.camera_id}",
            pending=self._overlay_tasks,
        )

    async def close(self) -> None:
        await self.stop_all()
        if self._live is not None:
            await self._live.close()
        if self._owns_ticket_client:
            await self._ticket_client.close()
        self.logger.debug("Stream registry closed")


__all__ = ["CameraContext", "StreamSessionRegistry"]
