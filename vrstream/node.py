import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .channel import DatagramChannel, make_channel
from .config import StreamConfig, load_config, validate_config
from .reassembly import make_reassembler
from .receive_engine import FrameTracker, UplinkReceiver
from .scheduler import EventScheduler, US_PER_MS
from .send_engine import DownlinkGenerator, UplinkGenerator
from .stats import DelayStats, summarize

logger = logging.getLogger(__name__)


@dataclass
class RunReport:
    transport: str
    total_frames: int
    on_time_frames: int
    late_frames: int
    incomplete_frames: int
    on_time_ratio: float
    downlink_delay: DelayStats = field(default_factory=DelayStats)
    uplink_delay: DelayStats = field(default_factory=DelayStats)
    stream_overflows: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "transport": self.transport,
            "total": self.total_frames,
            "onTime": self.on_time_frames,
            "late": self.late_frames,
            "incomplete": self.incomplete_frames,
            "ratio": self.on_time_ratio,
            "dl_avg": self.downlink_delay.avg,
            "dl_p99": self.downlink_delay.p99,
            "dl_max": self.downlink_delay.max,
            "ul_avg": self.uplink_delay.avg,
            "ul_p99": self.uplink_delay.p99,
            "ul_max": self.uplink_delay.max,
            "stream_overflows": self.stream_overflows,
        }


class Simulation:
    """
    Orchestrator for one simulated run: owns the scheduler, both generators,
    the channels, the reassembler and the receivers.

    Receivers listen from time zero, generators start at start_ms, and at
    stop_ms everything is shut down and open frames are swept into
    incomplete. The run is single-shot.
    """

    def __init__(self, config: StreamConfig, scheduler: Optional[EventScheduler] = None):
        self.config = validate_config(config)
        self.scheduler = scheduler if scheduler is not None else EventScheduler()
        sim = config.simulation

        self.start_us = sim.start_ms * US_PER_MS
        self.stop_us = sim.stop_ms * US_PER_MS
        self.drain_us = sim.drain_ms * US_PER_MS
        self.receiving = True
        self._ran = False

        self.tracker = FrameTracker(config.receiver.deadline_ms)
        self.reassembler = make_reassembler(
            config.delivery,
            self.tracker.process_fragment,
            fragment_payload_bytes=config.downlink.fragment_payload_bytes,
            capacity=config.receiver.stream_buffer_bytes,
        )
        self.uplink_receiver = UplinkReceiver()

        delay_us = sim.channel_delay_ms * US_PER_MS
        self.downlink_channel = make_channel(
            config.delivery,
            self.scheduler,
            self._on_downlink_data,
            delay_us=delay_us,
            segment_bytes=sim.stream_segment_bytes,
        )
        self.uplink_channel = DatagramChannel(self.scheduler, self._on_uplink_data, delay_us)

        self.downlink = DownlinkGenerator(
            config.downlink,
            self.scheduler,
            self.downlink_channel.send,
            pacing_enabled=config.pacing,
        )
        self.uplink = UplinkGenerator(config.uplink, self.scheduler, self.uplink_channel.send)

        # Scheduled first so it wins every tie at stop_us.
        self.scheduler.schedule_at(self.stop_us, self._shutdown)
        self.scheduler.schedule_at(self.start_us, self.downlink.start)
        self.scheduler.schedule_at(self.start_us, self.uplink.start)

    # ------------------------------------------------------------------

    def _on_downlink_data(self, data: bytes) -> None:
        if not self.receiving:
            return
        self.reassembler.feed(data, self.scheduler.now_ms())

    def _on_uplink_data(self, data: bytes) -> None:
        if not self.receiving:
            return
        self.uplink_receiver.process_sample(data, self.scheduler.now_ms())

    def _shutdown(self) -> None:
        logger.info("Stop time reached at %dms, shutting down", self.scheduler.now_ms())
        self.downlink.stop()
        self.uplink.stop()
        self.receiving = False
        self.tracker.finalize()

    # ------------------------------------------------------------------

    def run(self) -> RunReport:
        if self._ran:
            raise RuntimeError("Simulation already ran; build a new one")
        self._ran = True

        logger.info(
            "Running %s simulation from %dms to %dms",
            self.config.transport,
            self.config.simulation.start_ms,
            self.config.simulation.stop_ms,
        )
        self.scheduler.run(until_us=self.stop_us + self.drain_us)

        report = self.report()
        logger.info(
            "[VR-RECV] total=%d onTime=%d late=%d incomplete=%d ratio=%.4f",
            report.total_frames,
            report.on_time_frames,
            report.late_frames,
            report.incomplete_frames,
            report.on_time_ratio,
        )
        logger.info(
            "[UL-IMU] avgDelay=%.3f p99=%d max=%d",
            report.uplink_delay.avg,
            report.uplink_delay.p99,
            report.uplink_delay.max,
        )
        return report

    def report(self) -> RunReport:
        return RunReport(
            transport=self.config.transport,
            total_frames=self.tracker.total_frames,
            on_time_frames=self.tracker.on_time_frames,
            late_frames=self.tracker.late_frames,
            incomplete_frames=self.tracker.incomplete_frames,
            on_time_ratio=self.tracker.on_time_ratio,
            downlink_delay=summarize(self.tracker.delays),
            uplink_delay=summarize(self.uplink_receiver.delays),
            stream_overflows=getattr(self.reassembler, "overflows", 0),
        )


def run_simulation(
    config: Optional[StreamConfig] = None,
    config_path: Optional[str] = None,
) -> RunReport:
    """Create and run a simulation from a config object or file."""
    if config is None:
        config = load_config(config_path)
    return Simulation(config).run()
