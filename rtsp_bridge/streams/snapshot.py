"""
Snapshot stream engine.

Two ffmpeg stages turn still images into an RTSP feed:

    feeder -> [encoder: image2pipe -> H.264 MPEG-TS] -> relay -> [publisher: MPEG-TS -> RTSP]

The feeder writes the latest snapshot into the encoder at a fixed interval.
A live overlay temporarily splices frames decoded from the camera's live
call into the feed, either as a replacement upstream for the publisher
("video" mode) or as replacement images for the feeder ("frames" mode).
"""
from __future__ import annotations

import asyncio
import inspect
from typing import Any, Callable, Optional, Tuple

from rtsp_bridge.core.asyncio_utils import cancel_tasks, create_logged_task
from rtsp_bridge.core.logging_utils import get_module_logger

from .config import StreamConfig
from .defaults import RTSP_TRANSPORT
from .errors import ProcessSpawnError
from .frame_parser import FrameBoundaryParser
from .process import (
    PIPE_INPUT,
    PIPE_OUTPUT,
    PipeRelay,
    ProcessFactory,
    ProcessHandle,
    TranscodeArgs,
    spawn_process,
    stop_processes,
)
from .protocol import AltMediaDescriptor
from .state import StatusCallback, StreamSession, StreamStatus, StreamType

logger = get_module_logger("SnapshotStream")

ImageProvider = Callable[[], Optional[bytes]]
RefreshCallback = Callable[[], Any]

OVERLAY_READ_SIZE = 64 * 1024


def _scale_filter(size: Tuple[int, int]) -> str:
    width, height = size
    return (
        f"scale={width}:{height}:force_original_aspect_ratio=decrease,"
        f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2"
    )


def _h264_still_options(size: Tuple[int, int]) -> Tuple[str, ...]:
    return (
        "-vf", _scale_filter(size),
        "-sws_flags", "lanczos",
        "-c:v", "libx264",
        "-b:v", "6M",
        "-r", "5",
        "-g", "1",
        "-preset", "ultrafast",
        "-tune", "zerolatency",
    )


def snapshot_encoder_args(size: Tuple[int, int]) -> TranscodeArgs:
    return TranscodeArgs(
        input_options=("-f", "image2pipe", "-probesize", "32k", "-analyzeduration", "0"),
        input=PIPE_INPUT,
        codec_options=_h264_still_options(size),
        output_options=("-avioflags", "direct", "-f", "mpegts"),
        output=PIPE_OUTPUT,
    )


def snapshot_publisher_args(publish_url: str) -> TranscodeArgs:
    return TranscodeArgs(
        input_options=("-f", "mpegts", "-probesize", "32k", "-analyzeduration", "0"),
        input=PIPE_INPUT,
        codec_options=("-ss", ".2", "-c:v", "copy"),
        output_options=("-avioflags", "direct", "-f", "rtsp", "-rtsp_transport", RTSP_TRANSPORT),
        output=publish_url,
    )


def keepalive_args(source_url: str) -> TranscodeArgs:
    return TranscodeArgs(
        input=source_url,
        codec_options=("-map", "0:a:0", "-c:a", "copy"),
        output_options=("-f", "null"),
        output="/dev/null",
    )


def overlay_args(size: Tuple[int, int], mode: str) -> TranscodeArgs:
    input_options = (
        "-protocol_whitelist", "pipe,udp,rtp,fd,file,crypto",
        "-fflags", "nobuffer",
        "-flags", "low_delay",
        "-use_wallclock_as_timestamps", "1",
        "-itsoffset", "-0.2",
        "-probesize", "32K",
        "-analyzeduration", "0",
        "-f", "sdp",
    )
    if mode == "frames":
        # Discrete JPEG frames, picked apart by FrameBoundaryParser
        return TranscodeArgs(
            input_options=input_options,
            input=PIPE_INPUT,
            codec_options=("-r", "5", "-c:v", "mjpeg", "-q:v", "3"),
            output_options=("-f", "image2pipe"),
            output=PIPE_OUTPUT,
        )
    return TranscodeArgs(
        input_options=input_options,
        input=PIPE_INPUT,
        codec_options=_h264_still_options(size),
        output_options=("-avioflags", "direct", "-f", "mpegts"),
        output=PIPE_OUTPUT,
    )


class SnapshotSessionEngine:
    def __init__(
        self,
        camera_id: str,
        image_provider: ImageProvider,
        on_status: StatusCallback,
        config: Optional[StreamConfig] = None,
        *,
        live=None,
        refresh_snapshot: Optional[RefreshCallback] = None,
        process_factory: Optional[ProcessFactory] = None,
    ) -> None:
        self.camera_id = camera_id
        self.config = config or StreamConfig()
        self.live = live
        self.logger = logger.getChild(camera_id)
        self._image_provider = image_provider
        self._on_status = on_status
        self._refresh_snapshot = refresh_snapshot
        self._process_factory = process_factory

        self.status = StreamStatus.INACTIVE
        self.session: Optional[StreamSession] = None
        self._publisher: Optional[ProcessHandle] = None
        self._encoder: Optional[ProcessHandle] = None
        self._relay: Optional[PipeRelay] = None
        self._feeder_task: Optional[asyncio.Task] = None
        self._stopping = False
        self._generation = 0

        self._overlay_active = False
        self._overlay_task: Optional[asyncio.Task] = None
        self._overlay_cancel: Optional[asyncio.Event] = None
        self._held_frame: Optional[bytes] = None
        self._held_base: Optional[bytes] = None
        self.images_written = 0

    # ------------------------------------------------------------------ state

    @property
    def overlay_active(self) -> bool:
        return self._overlay_active

    @property
    def stopping(self) -> bool:
        return self._stopping

    @property
    def handles(self) -> list[ProcessHandle]:
        if self.session is None:
            return []
        return self.session.live_handles

    def _publish(self) -> None:
        try:
            self._on_status()
        except Exception:
            self.logger.exception("Status callback failed")

    def _fail(self, message: str) -> None:
        self.logger.error("%s", message)
        self.status = StreamStatus.FAILED
        self.session = None
        self._publish()

    # ------------------------------------------------------------------ start

    async def start(self, publish_url: str) -> None:
        if self._stopping:
            self._fail("Snapshot stream could not be started because it is in stopping state")
            return

        if self.status in (StreamStatus.ACTIVE, StreamStatus.STARTING):
            self.logger.debug("Snapshot stream is already active")
            self._publish()
            return

        if not self._image_provider():
            self._fail("Snapshot stream failed to start - No available snapshot")
            return

        generation = self._generation
        self.status = StreamStatus.STARTING
        session = self.session = StreamSession(StreamType.SNAPSHOT)
        publisher: Optional[ProcessHandle] = None
        encoder: Optional[ProcessHandle] = None

        try:
            publisher = await spawn_process(
                snapshot_publisher_args(publish_url),
                name="snapshot-publisher",
                ffmpeg_path=self.config.ffmpeg_path,
                stdin=True,
                stdout=False,
                on_exit=self._on_stage_exit,
                logger=self.logger,
                create=self._process_factory,
            )
            if generation != self._generation:
                await self._abandon_start(publisher)
                return
            session.attach(publisher)
            self._publisher = publisher

            encoder = await spawn_process(
                snapshot_encoder_args(self.config.snapshot_size),
                name="snapshot-encoder",
                ffmpeg_path=self.config.ffmpeg_path,
                stdin=True,
                stdout=True,
                on_exit=self._on_stage_exit,
                logger=self.logger,
                create=self._process_factory,
            )
            if generation != self._generation:
                await self._abandon_start(publisher, encoder)
                return
            session.attach(encoder)
            self._encoder = encoder
        except ProcessSpawnError as exc:
            self.logger.debug("%s", exc)
            if generation != self._generation:
                await self._abandon_start(publisher)
                return
            self._publisher = self._encoder = None
            await stop_processes([publisher, encoder], self.config.stop_timeout)
            self._fail("Snapshot stream failed to start - Failed to spawn ffmpeg")
            return

        self._relay = PipeRelay(self._publisher, logger=self.logger)
        self._relay.add_source(self._encoder, on_first_output=True)

        self.status = StreamStatus.ACTIVE
        session.status = StreamStatus.ACTIVE
        self._feeder_task = create_logged_task(
            self._feed_images(),
            logger=self.logger,
            context=f"snapshot-feeder-{self.camera_id}",
        )
        self.logger.info("Snapshot stream transcoding session has started")
        self._publish()

    async def _abandon_start(self, *handles: Optional[ProcessHandle]) -> None:
        # stop() ran while a stage was spawning; it could not see the new handle
        self.logger.debug("Snapshot stream was stopped while starting")
        await stop_processes(list(handles), self.config.stop_timeout)

    # ------------------------------------------------------------------ feeder

    def _current_image(self) -> Optional[bytes]:
        image = self._image_provider()
        if self._held_frame is not None:
            # The device swaps in a new bytes object when it refreshes its snapshot
            if image is self._held_base:
                return self._held_frame
            self._held_frame = None
            self._held_base = None
        return image

    async def _feed_images(self) -> None:
        interval = self.config.snapshot_interval
        while True:
            if self.status is not StreamStatus.ACTIVE or self._encoder is None:
                await self.stop()
                return

            try:
                image = self._current_image()
            except Exception:
                self.logger.exception("Reading the current snapshot failed")
                await self.stop()
                return
            if image:
                try:
                    await self._encoder.write(image)
                except (BrokenPipeError, ConnectionResetError) as exc:
                    self.logger.warning("Writing image to snapshot stream failed: %s", exc)
                    await self.stop()
                    return
                self.images_written += 1

            await asyncio.sleep(interval)

    async def _on_stage_exit(self, handle: ProcessHandle) -> None:
        if handle is not self._publisher and handle is not self._encoder:
            return
        self.logger.info("Snapshot stream transcoding session has ended (%s)", handle.name)
        await self.stop()

    # ------------------------------------------------------------------ overlay

    async def start_overlay(self, duration: float) -> bool:
        """Splice the live camera feed into the snapshot stream for ``duration`` seconds.

        Returns True if the overlay ran, False if it was refused or aborted.
        """
        if self._overlay_active:
            self.logger.debug("Live snapshot stream is already running")
            return False
        if self.status is not StreamStatus.ACTIVE:
            self.logger.warning("Live snapshot stream requires an active snapshot stream")
            return False
        if self.live is None:
            self.logger.warning("Live snapshot stream has no live stream to draw from")
            return False

        self._overlay_active = True
        self._overlay_task = asyncio.current_task()
        self._overlay_cancel = asyncio.Event()
        mode = self.config.overlay_mode
        keepalive: Optional[ProcessHandle] = None
        overlay: Optional[ProcessHandle] = None
        reader: Optional[asyncio.Task] = None
        spliced = False

        try:
            self.logger.info("Starting a live snapshot stream for camera")
            keepalive = await spawn_process(
                keepalive_args(self.config.live_source_for(self.camera_id)),
                name="snapshot-keepalive",
                ffmpeg_path=self.config.ffmpeg_path,
                stdin=False,
                stdout=False,
                logger=self.logger,
                create=self._process_factory,
            )
            self._track(keepalive)

            descriptor = await self._wait_for_alt_media()
            if descriptor is None:
                self.logger.warning("The live snapshot stream failed starting the live stream")
                return False
            if self._overlay_cancel.is_set() or self.status is not StreamStatus.ACTIVE:
                return False

            overlay = await spawn_process(
                overlay_args(self.config.snapshot_size, mode),
                name="snapshot-overlay",
                ffmpeg_path=self.config.ffmpeg_path,
                stdin=True,
                stdout=True,
                logger=self.logger,
                create=self._process_factory,
            )
            self._track(overlay)

            await self.live.release_alt_media_ports()
            await overlay.write(descriptor.session_description.encode("utf-8"))
            await overlay.close_stdin()

            if mode == "frames":
                reader = create_logged_task(
                    self._read_overlay_frames(overlay),
                    logger=self.logger,
                    context=f"snapshot-overlay-frames-{self.camera_id}",
                )
            else:
                self._relay.add_source(overlay, on_first_output=True)
            spliced = True

            await self._wait_overlay(overlay, self.config.overlay_lead_time + duration)
            return True
        except (ProcessSpawnError, BrokenPipeError, ConnectionResetError) as exc:
            self.logger.error("Live snapshot stream failed: %s", exc)
            return False
        finally:
            await self._end_overlay(keepalive, overlay, reader, spliced, mode)

    def _track(self, handle: ProcessHandle) -> None:
        if self.session is not None:
            self.session.attach(handle)

    async def _wait_for_alt_media(self) -> Optional[AltMediaDescriptor]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.alt_media_wait
        while True:
            descriptor = self.live.alt_media
            if descriptor is not None:
                return descriptor
            if self._overlay_cancel.is_set() or loop.time() >= deadline:
                return None
            await asyncio.sleep(self.config.alt_media_poll)

    async def _wait_overlay(self, overlay: ProcessHandle, timeout: float) -> None:
        waiters = {
            asyncio.ensure_future(overlay.wait()),
            asyncio.ensure_future(self._overlay_cancel.wait()),
        }
        try:
            await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()
            await asyncio.gather(*waiters, return_exceptions=True)

    async def _read_overlay_frames(self, overlay: ProcessHandle) -> None:
        parser = FrameBoundaryParser(max_buffer=self.config.frame_buffer_limit)
        while True:
            chunk = await overlay.stdout.read(OVERLAY_READ_SIZE)
            if not chunk:
                break
            for frame in parser.process_chunk(chunk):
                self._held_base = self._image_provider()
                self._held_frame = frame
        self.logger.debug("Overlay produced %d frames", parser.frames_parsed)

    async def _end_overlay(
        self,
        keepalive: Optional[ProcessHandle],
        overlay: Optional[ProcessHandle],
        reader: Optional[asyncio.Task],
        spliced: bool,
        mode: str,
    ) -> None:
        relay = self._relay
        if relay is not None and overlay is not None and overlay in relay.sources:
            if relay.current is overlay and self._encoder is not None:
                relay.switch_to(self._encoder)
            await relay.remove_source(overlay)

        await cancel_tasks([reader], logger=self.logger)
        await stop_processes([overlay, keepalive], self.config.stop_timeout)
        if self.session is not None:
            for handle in (overlay, keepalive):
                if handle is not None:
                    self.session.detach(handle)

        if spliced:
            self.logger.info("The live snapshot stream has stopped")
            if mode == "video":
                await self._request_refresh()

        self._overlay_active = False
        self._overlay_task = None
        self._overlay_cancel = None

    async def _request_refresh(self) -> None:
        if self._refresh_snapshot is None:
            return
        try:
            result = self._refresh_snapshot()
            if inspect.isawaitable(result):
                await result
        except Exception:
            self.logger.exception("Snapshot refresh request failed")

    async def _cancel_overlay(self) -> None:
        task = self._overlay_task
        if task is None:
            return
        if self._overlay_cancel is not None:
            self._overlay_cancel.set()
        if task is asyncio.current_task():
            return
        done, _ = await asyncio.wait({task}, timeout=self.config.stop_timeout * 2)
        if not done:
            await cancel_tasks([task], logger=self.logger)

    # ------------------------------------------------------------------ stop

    async def stop(self) -> None:
        if self._stopping:
            return
        if self.status is StreamStatus.INACTIVE and self._publisher is None and self._encoder is None:
            return

        self._stopping = True
        self._generation += 1
        try:
            feeder, self._feeder_task = self._feeder_task, None
            await cancel_tasks([feeder], logger=self.logger)

            previous = self.status
            self.status = StreamStatus.INACTIVE
            if previous is not StreamStatus.INACTIVE:
                self._publish()

            await self._cancel_overlay()

            relay, self._relay = self._relay, None
            if relay is not None:
                await relay.close()

            publisher, encoder = self._publisher, self._encoder
            self._publisher = self._encoder = None
            await stop_processes([publisher, encoder], self.config.stop_timeout)
            self._held_frame = None
            self._held_base = None
            self.session = None
            self.logger.debug("Snapshot stream stopped")
        finally:
            self._stopping = False


__all__ = [
    "SnapshotSessionEngine",
    "keepalive_args",
    "overlay_args",
    "snapshot_encoder_args",
    "snapshot_publisher_args",
]
