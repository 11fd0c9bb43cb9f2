"""
Receive-side reframing for vrstream.

Two delivery disciplines share one entry point, feed(data, arrival_ms):

- DATAGRAM: every received unit is exactly one fragment.
- STREAM: received chunks carry no boundaries; fragments are recovered by
  cutting fixed-size blocks (header + payload) off a rolling buffer.

Each decoded header is forwarded to on_header(header, arrival_ms).
"""

import enum
import logging
from typing import Callable

from .protocol import HEADER_SIZE, FragmentHeader, decode_header

logger = logging.getLogger(__name__)

DEFAULT_STREAM_BUFFER_BYTES = 200000

HeaderSink = Callable[[FragmentHeader, int], None]


class Delivery(enum.Enum):
    DATAGRAM = "datagram"
    STREAM = "stream"


class DatagramReassembler:
    """Message-preserving path: decode each unit's header directly."""

    delivery = Delivery.DATAGRAM

    def __init__(self, on_header: HeaderSink):
        self.on_header = on_header
        self.units_received = 0

    @property
    def buffered(self) -> int:
        return 0

    def feed(self, data: bytes, arrival_ms: int) -> None:
        self.units_received += 1
        self.on_header(decode_header(data), arrival_ms)


class StreamReassembler:
    """
    Byte-stream path: accumulate chunks and cut HEADER_SIZE + payload blocks
    off the front.

    The buffer is bounded by capacity. A chunk that would push it past the
    bound clears the whole buffer (the chunk is dropped with it) and
    accumulation restarts from empty.
    """

    delivery = Delivery.STREAM

    def __init__(
        self,
        on_header: HeaderSink,
        fragment_payload_bytes: int,
        capacity: int = DEFAULT_STREAM_BUFFER_BYTES,
    ):
        self.on_header = on_header
        self.block_size = HEADER_SIZE + int(fragment_payload_bytes)
        self.capacity = int(capacity)
        if self.capacity < self.block_size:
            raise ValueError(
                f"stream buffer of {self.capacity} bytes cannot hold one {self.block_size}-byte block"
            )
        self._buffer = bytearray()
        self.chunks_received = 0
        self.blocks_decoded = 0
        self.overflows = 0

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def feed(self, data: bytes, arrival_ms: int) -> None:
        self.chunks_received += 1

        if len(self._buffer) + len(data) > self.capacity:
            self.overflows += 1
            logger.warning(
                "Stream buffer overflow (%d buffered + %d incoming > %d), clearing buffer",
                len(self._buffer),
                len(data),
                self.capacity,
            )
            self._buffer.clear()
            return

        self._buffer.extend(data)

        while len(self._buffer) >= self.block_size:
            header = decode_header(self._buffer)
            del self._buffer[: self.block_size]
            self.blocks_decoded += 1
            self.on_header(header, arrival_ms)


def make_reassembler(
    delivery: Delivery,
    on_header: HeaderSink,
    fragment_payload_bytes: int = 1200,
    capacity: int = DEFAULT_STREAM_BUFFER_BYTES,
):
    """Pick the reassembler for a delivery discipline; fixed for the run."""
    if delivery is Delivery.DATAGRAM:
        return DatagramReassembler(on_header)
    if delivery is Delivery.STREAM:
        return StreamReassembler(on_header, fragment_payload_bytes, capacity)
    raise ValueError(f"Unknown delivery discipline: {delivery!r}")
