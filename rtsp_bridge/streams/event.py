"""Replay of a recorded camera event as an RTSP stream."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Optional, Union

from rtsp_bridge.core.logging_utils import get_module_logger

from .config import StreamConfig
from .defaults import RTSP_TRANSPORT
from .errors import ProcessSpawnError
from .process import ProcessFactory, ProcessHandle, TranscodeArgs, spawn_process, stop_process
from .state import StatusCallback, StreamSession, StreamStatus, StreamType

logger = get_module_logger("EventStream")

UNAVAILABLE_RECORDING = re.compile(r"Recording Not Found|Transcoding in Progress")


def ordinal_prefix(number: int) -> str:
    """Ordinal for log lines: empty for the latest event, then "2nd ", "3rd ", "4th "."""
    if number == 1:
        return ""
    if number == 2:
        return "2nd "
    if number == 3:
        return "3rd "
    return f"{number}th "


@dataclass(frozen=True)
class EventRecording:
    event_type: str
    index: int
    url: str
    transcoded: bool = False

    @property
    def available(self) -> bool:
        return bool(self.url) and not UNAVAILABLE_RECORDING.search(self.url)

    @property
    def description(self) -> str:
        return f"{ordinal_prefix(self.index)}most recent {self.event_type} event"

    @classmethod
    def from_selection(cls, selection: str, url: str, transcoded: bool = False) -> "EventRecording":
        """Build from a selector label such as "Motion 2" or "Ding 1"."""
        parts = selection.split()
        event_type = parts[0].lower().replace("-", "_") if parts else "unknown"
        try:
            index = int(parts[1]) if len(parts) > 1 else 1
        except ValueError:
            index = 1
        return cls(event_type=event_type, index=index, url=url, transcoded=transcoded)


def event_replay_args(recording: EventRecording, publish_url: str, *, reencode: bool) -> TranscodeArgs:
    if reencode:
        # HEVC recordings are converted so every RTSP client can play them
        video = ("-c:v", "libx264", "-g", "20", "-keyint_min", "10", "-crf", "23", "-preset", "ultrafast")
    else:
        video = ("-c:v", "copy")
    return TranscodeArgs(
        input_options=("-re",),
        input=recording.url,
        codec_options=(
            "-map", "0:v",
            "-map", "0:a",
            "-map", "0:a",
            *video,
            "-c:a:0", "copy",
            "-c:a:1", "libopus",
        ),
        output_options=("-flags", "+global_header", "-rtsp_transport", RTSP_TRANSPORT, "-f", "rtsp"),
        output=publish_url,
    )


class EventSessionEngine:
    def __init__(
        self,
        camera_id: str,
        recording_provider: Callable[[], Optional[EventRecording]],
        on_status: StatusCallback,
        config: Optional[StreamConfig] = None,
        *,
        hevc_enabled: Union[bool, Callable[[], bool]] = False,
        process_factory: Optional[ProcessFactory] = None,
    ) -> None:
        self.camera_id = camera_id
        self.config = config or StreamConfig()
        self.logger = logger.getChild(camera_id)
        self._recording_provider = recording_provider
        self._on_status = on_status
        self._hevc_enabled = hevc_enabled
        self._process_factory = process_factory

        self.status = StreamStatus.INACTIVE
        self.session: Optional[StreamSession] = None
        self.recording: Optional[EventRecording] = None
        self._process: Optional[ProcessHandle] = None
        self._stopping = False
        self._generation = 0

    @property
    def process(self) -> Optional[ProcessHandle]:
        return self._process

    @property
    def hevc_enabled(self) -> bool:
        if callable(self._hevc_enabled):
            return bool(self._hevc_enabled())
        return bool(self._hevc_enabled)

    def _publish(self) -> None:
        try:
            self._on_status()
        except Exception:
            self.logger.exception("Status callback failed")

    def _fail(self) -> None:
        self.status = StreamStatus.FAILED
        self.session = None
        self._publish()

    async def start(self, publish_url: str) -> None:
        if self._stopping:
            self.logger.error("Event stream could not be started because it is in stopping state")
            self._fail()
            return

        starting = self.status is StreamStatus.STARTING
        if starting or (self.status is StreamStatus.ACTIVE and self._process is not None):
            self.logger.debug("Event stream is already %s", self.status.value)
            self._publish()
            return

        recording = self._recording_provider()
        if recording is None or not recording.available:
            what = recording.description if recording else "selected event"
            self.logger.warning("No recording available for the %s!", what)
            self._fail()
            return

        self.recording = recording
        self.logger.info(
            "Streaming the %smost recently recorded %s event",
            ordinal_prefix(recording.index),
            recording.event_type,
        )

        generation = self._generation
        self.status = StreamStatus.STARTING
        self.session = StreamSession(StreamType.EVENT)
        reencode = recording.transcoded or self.hevc_enabled
        try:
            handle = await spawn_process(
                event_replay_args(recording, publish_url, reencode=reencode),
                name="event-replay",
                ffmpeg_path=self.config.ffmpeg_path,
                stdin=False,
                stdout=False,
                on_exit=self._on_exit,
                logger=self.logger,
                create=self._process_factory,
            )
        except ProcessSpawnError as exc:
            if generation != self._generation:
                return
            self.logger.error("Event stream failed to start: %s", exc)
            self._fail()
            return

        if generation != self._generation:
            # Stopped while spawning
            self.logger.debug("Event stream was stopped while starting")
            await stop_process(handle, self.config.stop_timeout)
            return

        self._process = handle
        self.session.status = StreamStatus.ACTIVE
        self.session.attach(handle)
        self.status = StreamStatus.ACTIVE
        self.logger.info("The recorded %s event stream has started", recording.event_type)
        self._publish()

    async def _on_exit(self, handle: ProcessHandle) -> None:
        if handle is not self._process:
            return
        self.logger.info(
            "The recorded %s event stream has ended",
            self.recording.event_type if self.recording else "",
        )
        self._process = None
        await handle.release()
        self.status = StreamStatus.INACTIVE
        self.session = None
        self._publish()

    async def stop(self) -> None:
        if self._stopping:
            return
        if self._process is None and self.status is StreamStatus.INACTIVE:
            return

        self._stopping = True
        self._generation += 1
        try:
            handle, self._process = self._process, None
            previous = self.status
            self.status = StreamStatus.INACTIVE
            self.session = None
            await stop_process(handle, self.config.stop_timeout)
            if previous is not StreamStatus.INACTIVE:
                self._publish()
        finally:
            self._stopping = False


__all__ = ["EventRecording", "EventSessionEngine", "event_replay_args", "ordinal_prefix"]
