"""
Interfaces for the WebRTC signaling collaborator.

The peer connection, SDP negotiation and RTP forwarding live outside this
package. The live worker only needs a session it can negotiate, observe and
stop; anything providing this shape can be plugged in through a
``SessionFactory``.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Callable, Generic, List, Protocol, TypeVar

from rtsp_bridge.core.logging_utils import get_module_logger

from .protocol import MediaOffer

logger = get_module_logger("Signaling")

T = TypeVar("T")


class Subscription:
    """Handle returned by EventHook.subscribe; cancel() detaches the callback."""

    def __init__(self, hook: "EventHook[Any]", callback: Callable[[Any], None]) -> None:
        self._hook = hook
        self._callback = callback
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def cancel(self) -> None:
        if self._active:
            self._active = False
            self._hook._remove(self)

    def _deliver(self, value: Any) -> None:
        if self._active:
            self._callback(value)


class EventHook(Generic[T]):
    """Minimal observable; emit() may be called from any thread."""

    def __init__(self, name: str = "event") -> None:
        self.name = name
        self._lock = threading.Lock()
        self._subscriptions: List[Subscription] = []

    def subscribe(self, callback: Callable[[T], None]) -> Subscription:
        subscription = Subscription(self, callback)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def emit(self, value: T = None) -> None:
        with self._lock:
            targets = list(self._subscriptions)
        for subscription in targets:
            try:
                subscription._deliver(value)
            except Exception:
                logger.exception("Subscriber of %s failed", self.name)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)


@dataclass(frozen=True)
class CameraInfo:
    camera_id: str
    name: str


class StreamingSession(Protocol):
    """One negotiated live call, as seen by the worker."""

    on_connection_state: EventHook[str]
    on_call_ended: EventHook[None]

    async def negotiate(self) -> MediaOffer:
        """Complete signaling and return the media description for ffmpeg."""
        ...

    def stop(self) -> None:
        """Request the call to end; completion is reported via on_call_ended."""
        ...


SessionFactory = Callable[[str, CameraInfo], StreamingSession]


__all__ = [
    "CameraInfo",
    "EventHook",
    "SessionFactory",
    "StreamingSession",
    "Subscription",
]
