"""
In-process channels for simulated runs.

These stand in for whatever the real network does: a fixed one-way delay,
no loss, no rate limit. The byte-stream variant also discards the sender's
unit boundaries so the receiver has to reframe.
"""

import logging
from typing import Callable

from .reassembly import Delivery
from .scheduler import EventScheduler

logger = logging.getLogger(__name__)

DEFAULT_SEGMENT_BYTES = 1448

Deliver = Callable[[bytes], None]


class DatagramChannel:
    """Delivers each unit whole, delay_us after it was sent."""

    def __init__(self, scheduler: EventScheduler, deliver: Deliver, delay_us: int = 0):
        self.scheduler = scheduler
        self.deliver = deliver
        self.delay_us = int(delay_us)
        self.units_sent = 0
        self.units_delivered = 0
        self.bytes_sent = 0

    def send(self, unit: bytes) -> bool:
        self.units_sent += 1
        self.bytes_sent += len(unit)
        self.scheduler.schedule(self.delay_us, self._arrive, bytes(unit))
        return True

    def _arrive(self, unit: bytes) -> None:
        self.units_delivered += 1
        self.deliver(unit)


class ByteStreamChannel:
    """
    Ordered byte stream. Everything sent at one instant is coalesced and
    re-cut into segment_bytes segments before delivery.
    """

    def __init__(
        self,
        scheduler: EventScheduler,
        deliver: Deliver,
        delay_us: int = 0,
        segment_bytes: int = DEFAULT_SEGMENT_BYTES,
    ):
        if segment_bytes <= 0:
            raise ValueError(f"segment_bytes must be positive, got {segment_bytes}")
        self.scheduler = scheduler
        self.deliver = deliver
        self.delay_us = int(delay_us)
        self.segment_bytes = int(segment_bytes)
        self._pending = bytearray()
        self._flush_scheduled = False
        self.units_sent = 0
        self.units_delivered = 0
        self.bytes_sent = 0

    def send(self, unit: bytes) -> bool:
        self.units_sent += 1
        self.bytes_sent += len(unit)
        self._pending.extend(unit)
        if not self._flush_scheduled:
            # Coalesces everything the current handler sends.
            self.scheduler.schedule(0, self._flush)
            self._flush_scheduled = True
        return True

    def _flush(self) -> None:
        self._flush_scheduled = False
        data = bytes(self._pending)
        self._pending.clear()
        for start in range(0, len(data), self.segment_bytes):
            self.scheduler.schedule(
                self.delay_us, self._arrive, data[start : start + self.segment_bytes]
            )
        logger.debug("Flushed %d bytes as %d-byte segments", len(data), self.segment_bytes)

    def _arrive(self, segment: bytes) -> None:
        self.units_delivered += 1
        self.deliver(segment)


def make_channel(
    delivery: Delivery,
    scheduler: EventScheduler,
    deliver: Deliver,
    delay_us: int = 0,
    segment_bytes: int = DEFAULT_SEGMENT_BYTES,
):
    if delivery is Delivery.STREAM:
        return ByteStreamChannel(scheduler, deliver, delay_us, segment_bytes)
    return DatagramChannel(scheduler, deliver, delay_us)
