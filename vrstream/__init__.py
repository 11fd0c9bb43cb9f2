"""
vrstream: deadline-aware AR/VR frame streaming under discrete-event timing

This package implements a small transport-agnostic streaming protocol:
- Periodic large downlink frames split into fragments with a fixed 12-byte header
- Burst or paced (QUIC-lite) fragment emission
- Periodic small timestamped uplink samples
- Reassembly from datagram or byte-stream delivery into one frame tracker
- On-time / late / incomplete frame classification and delay statistics
"""

__version__ = "0.1.0"

from .config import StreamConfig, load_config
from .node import RunReport, Simulation, run_simulation
from .protocol import FragmentHeader, MalformedHeader
from .reassembly import Delivery

__all__ = [
    'StreamConfig',
    'load_config',
    'RunReport',
    'Simulation',
    'run_simulation',
    'FragmentHeader',
    'MalformedHeader',
    'Delivery',
]
