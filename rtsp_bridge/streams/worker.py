"""
Live stream signaling worker.

The worker negotiates a WebRTC call through the signaling collaborator and
drives the ffmpeg process that republishes the call as RTSP. It runs on its
own thread and event loop (WorkerThread) so signaling and crypto work never
stalls the controller loop or other cameras. Everything it has to say goes
back to the controller as WorkerEvent messages.
"""
from __future__ import annotations

import asyncio
import threading
from typing import Callable, List, Optional

from rtsp_bridge.core.asyncio_utils import create_logged_task
from rtsp_bridge.core.logging_utils import get_module_logger

from .config import StreamConfig
from .defaults import RTSP_TRANSPORT
from .process import PIPE_INPUT, ProcessFactory, ProcessHandle, TranscodeArgs, spawn_process, stop_process
from .protocol import AltMediaDescriptor, MediaOffer, StreamData, WorkerCommand, WorkerEvent, WorkerState
from .signaling import CameraInfo, SessionFactory, StreamingSession, Subscription

logger = get_module_logger("LiveWorker")

EventSink = Callable[[WorkerEvent], None]


def live_transcode_args(publish_url: str) -> TranscodeArgs:
    return TranscodeArgs(
        input_options=(
            "-protocol_whitelist", "pipe,udp,rtp,file,crypto",
            "-use_wallclock_as_timestamps", "1",
            "-probesize", "32K",
            "-analyzeduration", "0",
            "-f", "sdp",
        ),
        input=PIPE_INPUT,
        codec_options=(
            "-map", "0:a",
            "-c:a:0", "aac",
            "-map", "0:a",
            "-c:a:1", "copy",
            "-map", "0:v",
            "-c:v", "copy",
        ),
        output_options=(
            "-flags", "+global_header",
            "-f", "rtsp",
            "-rtsp_transport", RTSP_TRANSPORT,
        ),
        output=publish_url,
    )


class SignalingWorker:
    """State machine for one camera's live call: idle, starting, active, inactive or failed."""

    def __init__(
        self,
        camera: CameraInfo,
        session_factory: SessionFactory,
        emit: EventSink,
        config: Optional[StreamConfig] = None,
        *,
        process_factory: Optional[ProcessFactory] = None,
    ) -> None:
        self.camera = camera
        self.config = config or StreamConfig()
        self._session_factory = session_factory
        self._emit = emit
        self._process_factory = process_factory

        self.state = WorkerState.IDLE
        self._session: Optional[StreamingSession] = None
        self._transcoder: Optional[ProcessHandle] = None
        self._alt_media: Optional[AltMediaDescriptor] = None
        self._subscriptions: List[Subscription] = []
        self._stopping = False
        self._pending: set[asyncio.Task] = set()

    # ------------------------------------------------------------------ state

    @property
    def session(self) -> Optional[StreamingSession]:
        return self._session

    @property
    def stopping(self) -> bool:
        return self._stopping

    @property
    def alt_media(self) -> Optional[AltMediaDescriptor]:
        return self._alt_media

    @property
    def transcoder(self) -> Optional[ProcessHandle]:
        return self._transcoder

    # ------------------------------------------------------------------ messages

    def _log_info(self, message: str) -> None:
        self._emit(WorkerEvent.log_info(message))

    def _log_error(self, message: str) -> None:
        self._emit(WorkerEvent.log_error(message))

    def _update_state(self, state: WorkerState) -> None:
        self.state = state
        self._emit(WorkerEvent.state(state, self._alt_media))

    async def handle_command(self, command: WorkerCommand) -> None:
        try:
            if command.command == "start":
                await self.start(command.stream_data)
            elif command.command == "stop":
                await self.stop()
            else:
                self._log_error(f"Unknown command received: {command.command}")
        except Exception as exc:
            logger.exception("Command %s failed", command.command)
            self._log_error(f"Error handling command {command.command}: {exc}")
            self._update_state(WorkerState.FAILED)

    # ------------------------------------------------------------------ start

    async def start(self, stream_data: Optional[StreamData]) -> None:
        if self._stopping:
            self._log_error("Live stream could not be started because it is in stopping state")
            self._update_state(WorkerState.FAILED)
            return

        if self._session is not None:
            self._log_error("Live stream could not be started because there is already an active stream")
            self._update_state(WorkerState.ACTIVE)
            return

        if stream_data is None or not stream_data.ticket:
            self._log_error("Live stream could not be started without a signaling ticket")
            self._update_state(WorkerState.FAILED)
            return

        await self._start_live_stream(stream_data)

    async def _start_live_stream(self, stream_data: StreamData) -> None:
        self._log_info("Live stream WebRTC worker received start command")
        self.state = WorkerState.STARTING
        session: Optional[StreamingSession] = None

        try:
            session = self._session_factory(stream_data.ticket, self.camera)
            self._session = session
            self._subscribe(session)

            offer = await session.negotiate()
            if self._session is not session:
                self._log_info("Live stream ended while negotiating, not starting transcoder")
                return

            self._alt_media = offer.alt_media
            await self._start_transcoding(offer, stream_data.publish_url)
        except Exception as exc:
            self._log_error(f"Live stream failed to start: {exc}")
            if session is not None and self._session is session:
                await self._clear_session(session)
            self._update_state(WorkerState.FAILED)

    async def _start_transcoding(self, offer: MediaOffer, publish_url: str) -> None:
        self._log_info("Live stream transcoding process is starting")
        handle = await spawn_process(
            live_transcode_args(publish_url),
            name="live-transcoder",
            ffmpeg_path=self.config.ffmpeg_path,
            stdin=True,
            stdout=False,
            on_exit=self._on_transcoder_exit,
            logger=logger,
            create=self._process_factory,
        )
        self._transcoder = handle
        await handle.write(offer.session_description.encode("utf-8"))
        await handle.close_stdin()
        self._log_info("Live stream transcoding process has started")

    # ------------------------------------------------------------------ session events

    def _subscribe(self, session: StreamingSession) -> None:
        loop = asyncio.get_running_loop()

        def marshal(handler):
            def callback(value=None):
                if loop.is_closed():
                    return
                loop.call_soon_threadsafe(self._dispatch, handler, session, value)
            return callback

        self._subscriptions = [
            session.on_connection_state.subscribe(marshal(self._on_connection_state)),
            session.on_call_ended.subscribe(marshal(self._on_call_ended)),
        ]

    def _dispatch(self, handler, session: StreamingSession, value) -> None:
        create_logged_task(
            handler(session, value),
            logger=logger,
            context=f"live-{handler.__name__}",
            pending=self._pending,
        )

    async def _on_connection_state(self, session: StreamingSession, state: str) -> None:
        if session is not self._session:
            return

        if state == "connected":
            self._update_state(WorkerState.ACTIVE)
            self._log_info("Live stream WebRTC session is connected")
        elif state == "failed":
            self._update_state(WorkerState.FAILED)
            self._log_info("Live stream WebRTC connection has failed")
            self._stopping = True
            try:
                await self._release(session)
                await asyncio.sleep(self.config.settle_delay)
            finally:
                if self._session is session:
                    self._session = None
                    self._alt_media = None
                self._stopping = False

    async def _on_call_ended(self, session: StreamingSession, _value=None) -> None:
        if session is not self._session:
            return
        self._log_info("Live stream WebRTC session has disconnected")
        await self._clear_session(session)
        self._update_state(WorkerState.INACTIVE)

    async def _on_transcoder_exit(self, handle: ProcessHandle) -> None:
        if handle is not self._transcoder:
            return
        self._log_info("Live stream transcoding process has ended")
        # Tracked in the pending set so shutdown() waits for it
        create_logged_task(self.stop(), logger=logger, context="live-stop-on-exit", pending=self._pending)

    # ------------------------------------------------------------------ stop

    async def stop(self) -> None:
        if self._session is None:
            return
        if self._stopping:
            self._log_info("Live stream is already stopping")
            return
        await self._stop_live_stream()

    async def _stop_live_stream(self) -> None:
        self._stopping = True
        session = self._session
        if self._transcoder is not None:
            self._transcoder.request_stop()

        try:
            self._request_session_stop(session)

            for _attempt in range(self.config.stop_attempts):
                await asyncio.sleep(self.config.stop_retry_interval)
                if self._session is not session:
                    break
                self._log_info("Live stream failed to stop on request, trying again...")
                self._request_session_stop(session)

            if self._session is session:
                self._log_error("Live stream failed to stop on request, deleting anyway...")
                await self._clear_session(session)
                self._update_state(WorkerState.INACTIVE)
        finally:
            self._stopping = False

    def _request_session_stop(self, session: StreamingSession) -> None:
        try:
            session.stop()
        except Exception as exc:
            self._log_error(f"Live stream stop request failed: {exc}")

    async def _release(self, session: StreamingSession) -> None:
        """Detach from ``session``, ask it to stop and release the transcoder."""
        for subscription in self._subscriptions:
            subscription.cancel()
        self._subscriptions = []
        self._request_session_stop(session)
        transcoder, self._transcoder = self._transcoder, None
        await stop_process(transcoder, self.config.stop_timeout)

    async def _clear_session(self, session: StreamingSession) -> None:
        if self._session is session:
            self._session = None
            self._alt_media = None
        await self._release(session)

    async def shutdown(self) -> None:
        """Stop any call and wait for background handlers before the loop closes."""
        await self.stop()
        if self._session is not None:
            await self._clear_session(self._session)
        transcoder, self._transcoder = self._transcoder, None
        await stop_process(transcoder, self.config.stop_timeout)
        if self._pending:
            await asyncio.wait(list(self._pending), timeout=self.config.stop_timeout * 2)
        leftover = list(self._pending)
        for task in leftover:
            task.cancel()
        if leftover:
            await asyncio.gather(*leftover, return_exceptions=True)


_SHUTDOWN = object()


class WorkerThread:
    """
    Runs a SignalingWorker on a background thread with its own event loop.

    Commands are queued onto the worker loop with call_soon_threadsafe and
    consumed one at a time in arrival order. Events are handed back to the
    controller loop the same way.
    """

    def __init__(
        self,
        name: str,
        build_worker: Callable[[EventSink], SignalingWorker],
        on_event: Callable[[WorkerEvent], None],
        controller_loop: asyncio.AbstractEventLoop,
    ) -> None:
        self.name = name
        self._build_worker = build_worker
        self._on_event = on_event
        self._controller_loop = controller_loop
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self.worker: Optional[SignalingWorker] = None
        self.thread: Optional[threading.Thread] = None
        self._queue: Optional[asyncio.Queue] = None
        self._ready = threading.Event()

    def start(self, timeout: float = 5.0) -> None:
        if self.thread is not None:
            return
        logger.debug("Starting live worker thread %s", self.name)
        self.thread = threading.Thread(target=self._run_event_loop, name=self.name, daemon=True)
        self.thread.start()

        if not self._ready.wait(timeout=timeout):
            raise RuntimeError(f"Live worker {self.name} failed to start within {timeout} seconds")

    def is_alive(self) -> bool:
        return self.thread is not None and self.thread.is_alive()

    def _run_event_loop(self) -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        self.loop = loop
        try:
            loop.run_until_complete(self._main())
        except Exception:
            logger.exception("Live worker %s crashed", self.name)
        finally:
            pending = [task for task in asyncio.all_tasks(loop) if not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
            loop.close()
            logger.debug("Live worker thread %s exited", self.name)

    async def _main(self) -> None:
        self._queue = asyncio.Queue()
        self.worker = self._build_worker(self._emit)
        self._ready.set()

        while True:
            command = await self._queue.get()
            if command is _SHUTDOWN:
                break
            await self.worker.handle_command(command)

        await self.worker.shutdown()

    def _emit(self, event: WorkerEvent) -> None:
        if self._controller_loop.is_closed():
            return
        self._controller_loop.call_soon_threadsafe(self._on_event, event)

    def post(self, command: WorkerCommand) -> bool:
        """Queue ``command`` for the worker; safe to call from any thread."""
        return self._post(command)

    def _post(self, item) -> bool:
        loop = self.loop
        if loop is None or loop.is_closed() or not self.is_alive():
            logger.warning("Live worker %s is not running, dropping %s", self.name, item)
            return False
        loop.call_soon_threadsafe(self._queue.put_nowait, item)
        return True

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Stop the worker loop and join its thread without blocking the caller's loop."""
        if self.thread is None:
            return
        self._post(_SHUTDOWN)
        await asyncio.to_thread(self.thread.join, timeout)
        if self.thread.is_alive():
            logger.warning("Live worker thread %s did not exit within %.1fs", self.name, timeout)
        self.thread = None


__all__ = ["SignalingWorker", "WorkerThread", "live_transcode_args"]
