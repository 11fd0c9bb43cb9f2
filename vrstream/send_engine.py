import logging
from typing import Callable, Optional

from .config import DownlinkConfig, UplinkConfig
from .protocol import (
    HEADER_SIZE,
    U16_MAX,
    U32_MAX,
    FragmentHeader,
    encode_uplink,
    make_fragment,
    to_wire_ms,
)
from .scheduler import EventScheduler, US_PER_MS

logger = logging.getLogger(__name__)

MIN_FRAME_GAP_US = 1


def fragment_count_for(frame_size_bytes: int, fragment_payload_bytes: int) -> int:
    """#fragments = ceil(frame_size / payload)."""
    return (frame_size_bytes + fragment_payload_bytes - 1) // fragment_payload_bytes


class DownlinkGenerator:
    """
    Send path for downlink frames: one frame per tick, split into
    fixed-size fragments and handed to network_send one unit at a time.

    Burst mode stamps every fragment of a frame with the same instant and
    keeps a fixed frame cadence. Paced mode chains fragments
    pacing_interval_us apart and then waits out what is left of the frame
    interval (at least MIN_FRAME_GAP_US) before the next frame.
    """

    def __init__(
        self,
        config: DownlinkConfig,
        scheduler: EventScheduler,
        network_send_func: Callable[[bytes], object],
        pacing_enabled: Optional[bool] = None,
    ):
        self.scheduler = scheduler
        self.network_send = network_send_func

        self.frame_interval_us = int(config.frame_interval_ms) * US_PER_MS
        self.fragment_payload_bytes = int(config.fragment_payload_bytes)
        self.pacing_enabled = bool(config.pacing_enabled if pacing_enabled is None else pacing_enabled)
        self.pacing_interval_us = int(config.pacing_interval_us)

        self.fragment_count = fragment_count_for(
            int(config.frame_size_bytes), self.fragment_payload_bytes
        )
        if not 1 <= self.fragment_count <= U16_MAX:
            raise ValueError(
                f"frame of {config.frame_size_bytes} bytes needs {self.fragment_count} fragments; "
                f"the header allows 1..{U16_MAX}"
            )

        self._payload = bytes(self.fragment_payload_bytes)
        self._frame_counter = 0
        self.running = False

        self.frames_sent = 0
        self.fragments_sent = 0

    @property
    def unit_size(self) -> int:
        return HEADER_SIZE + len(self._payload)

    @property
    def next_gap_us(self) -> int:
        """Delay between the last fragment of a paced frame and the next frame."""
        remaining = self.frame_interval_us - self.fragment_count * self.pacing_interval_us
        return max(remaining, MIN_FRAME_GAP_US)

    # ------------------------------------------------------------------

    def start(self) -> None:
        self.running = True
        logger.info(
            "Downlink generator started: %d fragments/frame, interval=%dus, pacing=%s",
            self.fragment_count,
            self.frame_interval_us,
            "%dus" % self.pacing_interval_us if self.pacing_enabled else "off",
        )
        self._send_frame()

    def stop(self) -> None:
        if not self.running:
            return
        self.running = False
        logger.info(
            "Downlink generator stopped after %d frames (%d fragments)",
            self.frames_sent,
            self.fragments_sent,
        )

    # ------------------------------------------------------------------

    def _next_frame_id(self) -> int:
        frame_id = self._frame_counter
        self._frame_counter = (self._frame_counter + 1) & U32_MAX
        return frame_id

    def _send_frame(self) -> None:
        if not self.running:
            return

        frame_id = self._next_frame_id()
        self.frames_sent += 1

        if not self.pacing_enabled:
            send_ts = to_wire_ms(self.scheduler.now_ms())
            for index in range(self.fragment_count):
                self._emit(frame_id, index, send_ts)
            logger.debug("Frame %d sent as a burst of %d fragments", frame_id, self.fragment_count)
            self.scheduler.schedule(self.frame_interval_us, self._send_frame)
        else:
            self._send_one_fragment(frame_id, 0)

    def _send_one_fragment(self, frame_id: int, index: int) -> None:
        if not self.running:
            return

        self._emit(frame_id, index, to_wire_ms(self.scheduler.now_ms()))

        if index + 1 < self.fragment_count:
            self.scheduler.schedule(
                self.pacing_interval_us, self._send_one_fragment, frame_id, index + 1
            )
        else:
            logger.debug("Frame %d paced out over %d fragments", frame_id, self.fragment_count)
            self.scheduler.schedule(self.next_gap_us, self._send_frame)

    def _emit(self, frame_id: int, index: int, send_ts: int) -> None:
        header = FragmentHeader(
            frame_id=frame_id,
            fragment_index=index,
            fragment_count=self.fragment_count,
            send_timestamp_ms=send_ts,
        )
        self.network_send(make_fragment(header, self._payload))
        self.fragments_sent += 1


class UplinkGenerator:
    """Send path for uplink samples: a timestamped fixed-size unit every interval."""

    def __init__(
        self,
        config: UplinkConfig,
        scheduler: EventScheduler,
        network_send_func: Callable[[bytes], object],
    ):
        self.scheduler = scheduler
        self.network_send = network_send_func
        self.interval_us = int(config.interval_ms) * US_PER_MS
        self.payload_bytes = int(config.payload_bytes)
        self.running = False
        self.samples_sent = 0

    def start(self) -> None:
        self.running = True
        logger.info(
            "Uplink generator started: interval=%dus, payload=%dB",
            self.interval_us,
            self.payload_bytes,
        )
        self._send_one()

    def stop(self) -> None:
        if not self.running:
            return
        self.running = False
        logger.info("Uplink generator stopped after %d samples", self.samples_sent)

    def _send_one(self) -> None:
        if not self.running:
            return
        self.network_send(encode_uplink(self.scheduler.now_ms(), self.payload_bytes))
        self.samples_sent += 1
        self.scheduler.schedule(self.interval_us, self._send_one)
