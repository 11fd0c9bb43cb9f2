import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from .protocol import FragmentHeader, decode_uplink_timestamp, wire_delay_ms

logger = logging.getLogger(__name__)


@dataclass
class FrameState:
    declared_count: int = 0
    arrived_count: int = 0
    declared_send_ts: int = 0
    counted: bool = False
    completed: bool = False


class FrameTracker:
    """
    Receive path: group fragments by frame_id, detect completion by
    arrival count, and classify each completed frame against the deadline.

    All headers for a run must come through process_fragment from a single
    caller; completion is one-shot per frame and relies on that.
    """

    def __init__(self, deadline_ms: int = 50):
        self.deadline_ms = int(deadline_ms)

        self._frames: Dict[int, FrameState] = {}
        self._max_age_ms: Optional[int] = None
        self._delays: List[int] = []
        self.finalized = False

        self.total_frames = 0
        self.on_time_frames = 0
        self.late_frames = 0
        self.incomplete_frames = 0

    # ------------------------------------------------------------------

    @property
    def on_time_ratio(self) -> float:
        if self.total_frames == 0:
            return 0.0
        return self.on_time_frames / self.total_frames

    @property
    def delays(self) -> List[int]:
        return list(self._delays)

    @property
    def open_frames(self) -> int:
        return sum(1 for st in self._frames.values() if st.counted and not st.completed)

    def frame_state(self, frame_id: int) -> FrameState:
        return self._frames[frame_id]

    # ------------------------------------------------------------------

    def process_fragment(self, header: FragmentHeader, arrival_ms: int) -> None:
        if self.finalized:
            logger.debug("Tracker finalized, ignoring fragment of frame %d", header.frame_id)
            return
        st = self._frames.get(header.frame_id)
        if st is None:
            if self._is_stale(header, arrival_ms):
                logger.debug("Ignoring straggler of expired frame %d", header.frame_id)
                return
            st = FrameState()
            self._frames[header.frame_id] = st

        if not st.counted:
            st.counted = True
            st.declared_count = header.fragment_count
            st.declared_send_ts = header.send_timestamp_ms
            self.total_frames += 1

        st.arrived_count += 1

        if not st.completed and st.arrived_count == st.declared_count:
            self._complete(header.frame_id, st, arrival_ms)

    def _complete(self, frame_id: int, st: FrameState, arrival_ms: int) -> None:
        delay = wire_delay_ms(arrival_ms, st.declared_send_ts)
        self._delays.append(delay)

        if delay <= self.deadline_ms:
            self.on_time_frames += 1
            outcome = "on time"
        else:
            self.late_frames += 1
            outcome = "late"

        st.completed = True
        logger.debug(
            "Frame %d complete after %dms (%s, deadline %dms)",
            frame_id,
            delay,
            outcome,
            self.deadline_ms,
        )

    # ------------------------------------------------------------------

    def finalize(self) -> None:
        """Count every frame that started but never completed as incomplete."""
        if self.finalized:
            return

        swept = 0
        for st in self._frames.values():
            if st.counted and not st.completed:
                swept += 1
        self.incomplete_frames += swept
        self.finalized = True

        logger.info(
            "Frame tracker finalized: total=%d onTime=%d late=%d incomplete=%d ratio=%.4f",
            self.total_frames,
            self.on_time_frames,
            self.late_frames,
            self.incomplete_frames,
            self.on_time_ratio,
        )

    def _is_stale(self, header: FragmentHeader, arrival_ms: int) -> bool:
        if self._max_age_ms is None:
            return False
        return wire_delay_ms(arrival_ms, header.send_timestamp_ms) > self._max_age_ms

    def expire(self, now_ms: int, max_age_ms: int) -> int:
        """
        Bound memory for long-running receivers.

        Open frames whose declared send time is more than max_age_ms behind
        now_ms are counted as incomplete and forgotten; completed frames that
        old are forgotten too. Once expire has run, a fragment that opens a
        new frame already older than max_age_ms is ignored, so stragglers of
        forgotten frames are never counted twice.
        Returns the number of frames counted incomplete; always 0 after
        finalize(), which has already swept every open frame.
        """
        if self.finalized:
            return 0
        self._max_age_ms = int(max_age_ms)

        expired = 0
        for frame_id in list(self._frames):
            st = self._frames[frame_id]
            if wire_delay_ms(now_ms, st.declared_send_ts) <= max_age_ms:
                continue
            del self._frames[frame_id]
            if st.counted and not st.completed:
                expired += 1

        if expired:
            self.incomplete_frames += expired
            logger.info("Expired %d incomplete frames older than %dms", expired, max_age_ms)
        return expired


class UplinkReceiver:
    """Turns each uplink sample into a one-way delay on arrival."""

    def __init__(self):
        self._delays: List[int] = []
        self.samples_received = 0

    @property
    def delays(self) -> List[int]:
        return list(self._delays)

    def process_sample(self, data: bytes, arrival_ms: int) -> None:
        send_ts = decode_uplink_timestamp(data)
        self._delays.append(wire_delay_ms(arrival_ms, send_ts))
        self.samples_received += 1
