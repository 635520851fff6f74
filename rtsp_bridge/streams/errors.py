"""Exceptions raised inside the stream engines.

None of these escape an engine's public ``start``/``stop``; they are turned
into a status value plus a log line at that boundary.
"""

from __future__ import annotations

from typing import Optional


class StreamError(Exception):
    """Base class for stream engine failures."""


class TicketError(StreamError):
    """Signaling ticket could not be acquired."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class TicketForbiddenError(TicketError):
    """The service refused to issue a ticket (HTTP 403).

    This usually means live streaming is blocked by the account's Modes
    settings, so the attempt is not retried.
    """


class TicketRequestError(TicketError):
    """Any other ticket failure: network error, bad status or bad payload."""


class ProcessSpawnError(StreamError):
    """The transcoding program could not be started."""


__all__ = [
    "ProcessSpawnError",
    "StreamError",
    "TicketError",
    "TicketForbiddenError",
    "TicketRequestError",
]
