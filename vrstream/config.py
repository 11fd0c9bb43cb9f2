import os
import yaml
from dataclasses import dataclass, field
from typing import Optional

from .protocol import HEADER_SIZE
from .reassembly import Delivery

TRANSPORTS = ("udp", "quic", "tcp")


@dataclass
class DownlinkConfig:
    frame_interval_ms: int = 33
    frame_size_bytes: int = 90000
    fragment_payload_bytes: int = 1200
    pacing_enabled: bool = False
    pacing_interval_us: int = 200


@dataclass
class UplinkConfig:
    interval_ms: int = 10
    payload_bytes: int = 100


@dataclass
class ReceiverConfig:
    deadline_ms: int = 50
    stream_buffer_bytes: int = 200000
    frame_expiry_ms: Optional[int] = None


@dataclass
class SimulationConfig:
    start_ms: int = 1000
    stop_ms: int = 10000
    drain_ms: int = 10000
    channel_delay_ms: int = 10
    stream_segment_bytes: int = 1448


@dataclass
class StreamConfig:
    transport: str = "udp"
    downlink: DownlinkConfig = field(default_factory=DownlinkConfig)
    uplink: UplinkConfig = field(default_factory=UplinkConfig)
    receiver: ReceiverConfig = field(default_factory=ReceiverConfig)
    simulation: SimulationConfig = field(default_factory=SimulationConfig)

    @property
    def delivery(self) -> Delivery:
        """tcp carries the downlink as a byte stream; udp and quic keep boundaries."""
        return Delivery.STREAM if self.transport == "tcp" else Delivery.DATAGRAM

    @property
    def pacing(self) -> bool:
        return self.downlink.pacing_enabled or self.transport == "quic"


def validate_config(config: StreamConfig) -> StreamConfig:
    if config.transport not in TRANSPORTS:
        raise ValueError(
            f"Unknown transport: {config.transport!r} (expected one of {', '.join(TRANSPORTS)})"
        )

    positive = {
        "downlink.frame_interval_ms": config.downlink.frame_interval_ms,
        "downlink.frame_size_bytes": config.downlink.frame_size_bytes,
        "downlink.fragment_payload_bytes": config.downlink.fragment_payload_bytes,
        "downlink.pacing_interval_us": config.downlink.pacing_interval_us,
        "uplink.interval_ms": config.uplink.interval_ms,
        "receiver.stream_buffer_bytes": config.receiver.stream_buffer_bytes,
        "simulation.stream_segment_bytes": config.simulation.stream_segment_bytes,
    }
    for name, value in positive.items():
        if value <= 0:
            raise ValueError(f"{name} must be positive, got {value}")

    if config.uplink.payload_bytes < 0:
        raise ValueError(f"uplink.payload_bytes must not be negative, got {config.uplink.payload_bytes}")
    if config.receiver.deadline_ms < 0:
        raise ValueError(f"receiver.deadline_ms must not be negative, got {config.receiver.deadline_ms}")
    if config.simulation.stop_ms <= config.simulation.start_ms:
        raise ValueError("simulation.stop_ms must come after simulation.start_ms")

    capacity = config.receiver.stream_buffer_bytes
    block_size = HEADER_SIZE + config.downlink.fragment_payload_bytes
    if capacity < block_size:
        raise ValueError(
            f"receiver.stream_buffer_bytes ({capacity}) cannot hold one {block_size}-byte block"
        )
    # A segment larger than the buffer overflows even an empty one.
    if config.simulation.stream_segment_bytes > capacity:
        raise ValueError(
            f"simulation.stream_segment_bytes ({config.simulation.stream_segment_bytes}) "
            f"exceeds receiver.stream_buffer_bytes ({capacity})"
        )

    return config


def load_config(config_path: Optional[str] = None) -> StreamConfig:
    """Load configuration from file or use defaults."""
    if config_path and os.path.exists(config_path):
        with open(config_path, 'r') as f:
            config_data = yaml.safe_load(f) or {}

        config = StreamConfig(
            transport=str(config_data.get('transport', 'udp')).lower(),
            downlink=DownlinkConfig(**(config_data.get('downlink') or {})),
            uplink=UplinkConfig(**(config_data.get('uplink') or {})),
            receiver=ReceiverConfig(**(config_data.get('receiver') or {})),
            simulation=SimulationConfig(**(config_data.get('simulation') or {})),
        )
    else:
        config = StreamConfig()

    return validate_config(config)
