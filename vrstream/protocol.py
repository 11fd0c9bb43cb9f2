"""
Wire format helpers for vrstream.

Downlink delivery unit (network order):
  I   frame_id
  H   fragment_index
  H   fragment_count
  I   send_timestamp_ms
followed by fragment_payload_bytes of payload. Total header = 12 bytes.

Uplink delivery unit:
  I   send_timestamp_ms
followed by a fixed-size payload.
"""

import struct
from dataclasses import dataclass

HEADER_FORMAT = "!IHHI"
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)  # 12

UPLINK_HEADER_FORMAT = "!I"
UPLINK_HEADER_SIZE = struct.calcsize(UPLINK_HEADER_FORMAT)  # 4

U16_MAX = 0xFFFF
U32_MAX = 0xFFFFFFFF


class MalformedHeader(ValueError):
    """Fewer bytes were available than a header needs."""


def to_wire_ms(ms: int) -> int:
    """Wrap a millisecond clock reading into the u32 timestamp field."""
    return int(ms) & U32_MAX


def wire_delay_ms(arrival_ms: int, send_ts_ms: int) -> int:
    """One-way delay between two u32 timestamps, tolerant of wraparound."""
    return (to_wire_ms(arrival_ms) - int(send_ts_ms)) & U32_MAX


@dataclass(frozen=True)
class FragmentHeader:
    frame_id: int
    fragment_index: int
    fragment_count: int
    send_timestamp_ms: int

    def validate(self) -> None:
        if not 0 <= self.frame_id <= U32_MAX:
            raise ValueError(f"frame_id out of range: {self.frame_id}")
        if not 1 <= self.fragment_count <= U16_MAX:
            raise ValueError(f"fragment_count out of range: {self.fragment_count}")
        if not 0 <= self.fragment_index < self.fragment_count:
            raise ValueError(
                f"fragment_index {self.fragment_index} not below fragment_count {self.fragment_count}"
            )
        if not 0 <= self.send_timestamp_ms <= U32_MAX:
            raise ValueError(f"send_timestamp_ms out of range: {self.send_timestamp_ms}")


def encode_header(header: FragmentHeader) -> bytes:
    header.validate()
    return struct.pack(
        HEADER_FORMAT,
        header.frame_id,
        header.fragment_index,
        header.fragment_count,
        header.send_timestamp_ms,
    )


def decode_header(data: bytes) -> FragmentHeader:
    """
    Decode the 12-byte header at the front of data.

    Anything after the header is ignored. The caller must hand over at least
    HEADER_SIZE bytes; nothing is buffered here. Field invariants are not
    checked: a misaligned stream decodes to whatever the bytes say.
    """
    if len(data) < HEADER_SIZE:
        raise MalformedHeader(
            f"need {HEADER_SIZE} bytes for a fragment header, got {len(data)}"
        )
    frame_id, index, count, send_ts = struct.unpack_from(HEADER_FORMAT, data, 0)
    return FragmentHeader(
        frame_id=frame_id,
        fragment_index=index,
        fragment_count=count,
        send_timestamp_ms=send_ts,
    )


def make_fragment(header: FragmentHeader, payload: bytes) -> bytes:
    return encode_header(header) + bytes(payload)


def encode_uplink(send_timestamp_ms: int, payload_bytes: int) -> bytes:
    return struct.pack(UPLINK_HEADER_FORMAT, to_wire_ms(send_timestamp_ms)) + bytes(payload_bytes)


def decode_uplink_timestamp(data: bytes) -> int:
    if len(data) < UPLINK_HEADER_SIZE:
        raise MalformedHeader(
            f"need {UPLINK_HEADER_SIZE} bytes for an uplink timestamp, got {len(data)}"
        )
    return struct.unpack_from(UPLINK_HEADER_FORMAT, data, 0)[0]
