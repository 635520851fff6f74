"""
Live stream controller.

Acquires a signaling ticket over HTTP, forwards start/stop commands to the
camera's SignalingWorker thread and turns the worker's events into stream
status. While a live call is active the controller also holds the two UDP
ports of the call's alt-media copy so nothing else grabs them before a
snapshot overlay is ready to consume them.
"""
from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from rtsp_bridge.core.asyncio_utils import cancel_tasks, create_logged_task
from rtsp_bridge.core.logging_utils import get_module_logger

from .config import StreamConfig
from .defaults import DEFAULT_TICKET_TIMEOUT, DEFAULT_TICKET_URL
from .errors import TicketError, TicketForbiddenError, TicketRequestError
from .process import ProcessFactory
from .protocol import EVENT_LOG_ERROR, EVENT_LOG_INFO, EVENT_STATE, AltMediaDescriptor, WorkerCommand, WorkerEvent
from .signaling import CameraInfo, SessionFactory
from .state import StatusCallback, StreamSession, StreamStatus, StreamType
from .worker import SignalingWorker, WorkerThread

logger = get_module_logger("LiveStream")


class TicketClient:
    """Requests a signaling session ticket with a single POST."""

    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        *,
        url: str = DEFAULT_TICKET_URL,
        timeout: float = DEFAULT_TICKET_TIMEOUT,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self.headers = dict(headers or {})
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def request_ticket(self) -> str:
        """Return a fresh ticket.

        Raises:
            TicketForbiddenError: the service answered 403.
            TicketRequestError: network failure, other bad status or no ticket in the reply.
        """
        session = await self._get_session()
        try:
            async with session.post(
                self.url,
                headers=self.headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as response:
                if response.status == 403:
                    raise TicketForbiddenError("Ticket request was refused", status=403)
                if response.status >= 400:
                    raise TicketRequestError(
                        f"Ticket request failed with HTTP {response.status}",
                        status=response.status,
                    )
                payload: Any = await response.json(content_type=None)
        except TicketError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise TicketRequestError(f"Ticket request failed: {exc}") from exc

        ticket = payload.get("ticket") if isinstance(payload, dict) else None
        if not ticket:
            raise TicketRequestError("Ticket response did not contain a ticket")
        return str(ticket)

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None


class _DiscardProtocol(asyncio.DatagramProtocol):
    def __init__(self) -> None:
        self.closed: asyncio.Future = asyncio.get_running_loop().create_future()

    def datagram_received(self, data: bytes, addr) -> None:
        pass

    def connection_lost(self, exc: Optional[Exception]) -> None:
        if not self.closed.done():
            self.closed.set_result(None)


class AltMediaRelay:
    """Holds the alt-media port pair (media and control) until a consumer takes over."""

    def __init__(self, host: str = "127.0.0.1") -> None:
        self.host = host
        self.port: Optional[int] = None
        self._endpoints: List[Tuple[asyncio.DatagramTransport, _DiscardProtocol]] = []

    @property
    def bound(self) -> bool:
        return bool(self._endpoints)

    async def bind(self, port: int) -> None:
        await self.unbind()
        loop = asyncio.get_running_loop()
        try:
            for target in (port, port + 1):
                endpoint = await loop.create_datagram_endpoint(
                    _DiscardProtocol,
                    local_addr=(self.host, target),
                )
                self._endpoints.append(endpoint)
        except OSError:
            await self.unbind()
            raise
        self.port = port
        logger.debug("Reserved alt media ports %d/%d", port, port + 1)

    async def unbind(self) -> None:
        """Close both sockets and wait until the ports are free again."""
        if not self._endpoints:
            return
        endpoints, self._endpoints = self._endpoints, []
        for transport, _protocol in endpoints:
            transport.close()
        # The transport closes its socket on a later loop iteration
        await asyncio.gather(*(protocol.closed for _transport, protocol in endpoints))
        logger.debug("Released alt media ports %s/%s", self.port, None if self.port is None else self.port + 1)
        self.port = None


class LiveSessionController:
    def __init__(
        self,
        camera: CameraInfo,
        session_factory: SessionFactory,
        ticket_client: TicketClient,
        on_status: StatusCallback,
        config: Optional[StreamConfig] = None,
        *,
        relay: Optional[AltMediaRelay] = None,
        process_factory: Optional[ProcessFactory] = None,
    ) -> None:
        self.camera = camera
        self.config = config or StreamConfig()
        self.ticket_client = ticket_client
        self._session_factory = session_factory
        self._on_status = on_status
        self._process_factory = process_factory
        self.relay = relay or AltMediaRelay()
        self.logger = logger.getChild(camera.camera_id)
        self.wrtc_logger = self.logger.getChild("wrtc")

        self.status = StreamStatus.INACTIVE
        self.session: Optional[StreamSession] = None
        self._alt_media: Optional[AltMediaDescriptor] = None
        self._worker: Optional[WorkerThread] = None
        self._events: Optional[asyncio.Queue] = None
        self._event_task: Optional[asyncio.Task] = None
        self._closed = False

    # ------------------------------------------------------------------ state

    @property
    def alt_media(self) -> Optional[AltMediaDescriptor]:
        return self._alt_media

    @property
    def worker(self) -> Optional[WorkerThread]:
        return self._worker

    def _publish(self) -> None:
        try:
            self._on_status()
        except Exception:
            self.logger.exception("Status callback failed")

    def _set_status(self, status: StreamStatus) -> None:
        self.status = status
        if status.terminal:
            self.session = None
        elif self.session is not None:
            self.session.status = status

    # ------------------------------------------------------------------ worker

    def _ensure_worker(self) -> WorkerThread:
        if self._worker is not None and self._worker.is_alive():
            return self._worker

        loop = asyncio.get_running_loop()
        self._events = asyncio.Queue()
        self._event_task = create_logged_task(
            self._event_consumer(),
            logger=self.logger,
            context=f"live-events-{self.camera.camera_id}",
        )
        self._worker = WorkerThread(
            f"live-worker-{self.camera.camera_id}",
            self._build_worker,
            self._events.put_nowait,
            loop,
        )
        self._worker.start()
        return self._worker

    def _build_worker(self, emit) -> SignalingWorker:
        return SignalingWorker(
            self.camera,
            self._session_factory,
            emit,
            self.config,
            process_factory=self._process_factory,
        )

    async def _event_consumer(self) -> None:
        while True:
            event = await self._events.get()
            await self.handle_event(event)

    async def handle_event(self, event: WorkerEvent) -> None:
        """Apply one worker event on the controller loop."""
        if event.type == EVENT_LOG_INFO:
            self.wrtc_logger.info("%s", event.data)
            return
        if event.type == EVENT_LOG_ERROR:
            self.wrtc_logger.error("%s", event.data)
            return
        if event.type != EVENT_STATE:
            self.logger.debug("Ignoring worker event %s", event.type)
            return

        if event.data == StreamStatus.ACTIVE.value:
            if self.session is None:
                self.session = StreamSession(StreamType.LIVE)
            self._set_status(StreamStatus.ACTIVE)
            await self._attach_alt_media(event.extra)
        elif event.data == StreamStatus.INACTIVE.value:
            self._set_status(StreamStatus.INACTIVE)
            await self._detach_alt_media()
        elif event.data == StreamStatus.FAILED.value:
            self._set_status(StreamStatus.FAILED)
            await self._detach_alt_media()
        else:
            self.logger.debug("Ignoring worker state %s", event.data)
            return
        self._publish()

    async def _attach_alt_media(self, descriptor: Optional[AltMediaDescriptor]) -> None:
        if descriptor is None:
            return
        if descriptor == self._alt_media and self.relay.bound:
            return
        self._alt_media = descriptor
        try:
            await self.relay.bind(descriptor.port)
        except OSError as exc:
            self.logger.warning("Could not reserve alt media ports %d/%d: %s", descriptor.port, descriptor.control_port, exc)

    async def _detach_alt_media(self) -> None:
        await self.relay.unbind()
        self._alt_media = None

    async def release_alt_media_ports(self) -> None:
        """Hand the reserved ports over to a consumer that is about to bind them."""
        await self.relay.unbind()

    # ------------------------------------------------------------------ commands

    async def start(self, publish_url: str) -> None:
        if self._closed:
            self.logger.error("Live stream controller is closed")
            return

        self.session = StreamSession(StreamType.LIVE)
        self.status = StreamStatus.STARTING

        ticket: Optional[str] = None
        try:
            self.logger.info("Acquiring a live stream WebRTC signaling session ticket")
            ticket = await self.ticket_client.request_ticket()
        except TicketForbiddenError:
            self.logger.warning(
                "Camera returned 403 when starting a live stream. "
                "This usually indicates that live streaming is blocked by Modes settings."
            )
        except TicketError as exc:
            self.logger.error("Live stream ticket request failed: %s", exc)

        if ticket:
            self.logger.info("Live stream WebRTC signaling session ticket acquired, starting live stream worker")
            try:
                posted = self._ensure_worker().post(WorkerCommand.start(ticket, publish_url))
            except RuntimeError as exc:
                self.logger.error("Live stream worker unavailable: %s", exc)
                posted = False
            if posted:
                return

        self.logger.error("Live stream failed to initialize WebRTC signaling session")
        self._set_status(StreamStatus.FAILED)
        self._publish()

    async def stop(self) -> None:
        if self.session is not None and self._worker is not None:
            self._worker.post(WorkerCommand.stop())
        await self._detach_alt_media()
        previous = self.status
        self._set_status(StreamStatus.INACTIVE)
        if previous is not StreamStatus.INACTIVE:
            self._publish()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.stop()
        if self._worker is not None:
            await self._worker.shutdown(timeout=self.config.stop_timeout + self.config.stop_attempts * self.config.stop_retry_interval)
            self._worker = None
        await cancel_tasks([self._event_task], logger=self.logger)
        self._event_task = None
        await self._detach_alt_media()


__all__ = ["AltMediaRelay", "LiveSessionController", "TicketClient"]
