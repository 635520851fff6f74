"""Incremental extraction of JPEG frames from a concatenated MJPEG byte stream."""

from __future__ import annotations

from typing import List, Optional

from rtsp_bridge.core.logging_utils import get_module_logger

from .defaults import DEFAULT_FRAME_BUFFER_LIMIT, JPEG_END_MARKER, JPEG_START_MARKER

logger = get_module_logger("FrameParser")


class FrameBoundaryParser:
    """Splits a byte stream into frames delimited by start/end markers.

    A frame runs from the first byte of the start marker through the last byte
    of the end marker. Bytes before a start marker are discarded. The internal
    buffer never grows past ``max_buffer``; a stream that never closes a frame
    is dropped and the search starts over.
    """

    def __init__(
        self,
        start_marker: bytes = JPEG_START_MARKER,
        end_marker: bytes = JPEG_END_MARKER,
        max_buffer: int = DEFAULT_FRAME_BUFFER_LIMIT,
    ) -> None:
        if not start_marker or not end_marker:
            raise ValueError("Frame markers must be non-empty")
        if max_buffer <= len(start_marker) + len(end_marker):
            raise ValueError("max_buffer is too small to hold a frame")
        self.start_marker = start_marker
        self.end_marker = end_marker
        self.max_buffer = max_buffer
        self._buffer = bytearray()
        self._start: Optional[int] = None
        self.frames_parsed = 0
        self.overflows = 0

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    @property
    def start_offset(self) -> Optional[int]:
        return self._start

    def reset(self) -> None:
        self._buffer.clear()
        self._start = None

    def process_chunk(self, chunk: bytes) -> List[bytes]:
        """Feed ``chunk`` and return every frame it completes, in order."""
        frames: List[bytes] = []
        if not chunk:
            return frames

        self._buffer.extend(chunk)

        while True:
            if self._start is None:
                start = self._buffer.find(self.start_marker)
                if start == -1:
                    # Keep a possible partial marker split across chunks
                    keep = len(self.start_marker) - 1
                    if len(self._buffer) > keep:
                        del self._buffer[: len(self._buffer) - keep]
                    break
                if start > 0:
                    del self._buffer[:start]
                self._start = 0

            end = self._buffer.find(self.end_marker, self._start + len(self.start_marker))
            if end == -1:
                break

            stop = end + len(self.end_marker)
            frames.append(bytes(self._buffer[self._start:stop]))
            del self._buffer[:stop]
            self._start = None
            self.frames_parsed += 1

        if len(self._buffer) > self.max_buffer:
            self.overflows += 1
            logger.warning(
                "Frame buffer exceeded %d bytes without a complete frame, resetting",
                self.max_buffer,
            )
            self.reset()

        return frames


__all__ = ["FrameBoundaryParser"]
