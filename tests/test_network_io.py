import time

import pytest

from vrstream.network_io import DatagramSender, ReceiverService, StreamSender
from vrstream.protocol import FragmentHeader, MalformedHeader, encode_uplink, make_fragment
from vrstream.reassembly import Delivery
from vrstream.receive_engine import FrameTracker, UplinkReceiver

PAYLOAD = 64
NOW_MS = 5000


def _frame_units(frame_id, count, send_ts):
    return [
        make_fragment(
            FragmentHeader(
                frame_id=frame_id,
                fragment_index=idx,
                fragment_count=count,
                send_timestamp_ms=send_ts,
            ),
            bytes(PAYLOAD),
        )
        for idx in range(count)
    ]


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def fixed_clock():
    return lambda: NOW_MS


def test_udp_loopback_classifies_frames_and_uplink(fixed_clock):
    tracker = FrameTracker(deadline_ms=50)
    uplink = UplinkReceiver()
    service = ReceiverService(
        Delivery.DATAGRAM,
        tracker,
        uplink_receiver=uplink,
        fragment_payload_bytes=PAYLOAD,
        clock=fixed_clock,
        host="127.0.0.1",
    )
    service.start()
    sender = DatagramSender(("127.0.0.1", service.port))
    uplink_sender = DatagramSender(("127.0.0.1", service.uplink_port))
    try:
        for unit in _frame_units(0, 3, NOW_MS - 10) + _frame_units(1, 3, NOW_MS - 70):
            assert sender.send(unit)
        assert uplink_sender.send(encode_uplink(NOW_MS - 12, 100))

        assert _wait_for(
            lambda: tracker.on_time_frames + tracker.late_frames == 2
            and uplink.samples_received == 1
        )
    finally:
        sender.close()
        uplink_sender.close()
        service.stop()

    assert tracker.finalized
    assert tracker.total_frames == 2
    assert tracker.on_time_frames == 1
    assert tracker.late_frames == 1
    assert sorted(tracker.delays) == [10, 70]
    assert uplink.delays == [12]


def test_tcp_loopback_reframes_the_byte_stream(fixed_clock):
    tracker = FrameTracker(deadline_ms=50)
    service = ReceiverService(
        Delivery.STREAM,
        tracker,
        fragment_payload_bytes=PAYLOAD,
        clock=fixed_clock,
        host="127.0.0.1",
    )
    service.start()
    sender = StreamSender(("127.0.0.1", service.port))
    try:
        data = b"".join(_frame_units(7, 4, NOW_MS - 20))
        # Cut through the middle of headers so nothing lines up with units.
        for start in range(0, len(data), 50):
            assert sender.send(data[start : start + 50])

        assert _wait_for(lambda: tracker.on_time_frames == 1)
    finally:
        sender.close()
        service.stop()

    assert tracker.total_frames == 1
    assert tracker.incomplete_frames == 0
    assert tracker.delays == [20]


def test_stop_sweeps_partial_frames(fixed_clock):
    tracker = FrameTracker(deadline_ms=50)
    service = ReceiverService(
        Delivery.DATAGRAM,
        tracker,
        fragment_payload_bytes=PAYLOAD,
        clock=fixed_clock,
        host="127.0.0.1",
    )
    service.start()
    sender = DatagramSender(("127.0.0.1", service.port))
    try:
        assert sender.send(_frame_units(3, 2, NOW_MS)[0])
        assert _wait_for(lambda: tracker.total_frames == 1)
    finally:
        sender.close()
        service.stop()

    assert tracker.incomplete_frames == 1
    assert tracker.on_time_ratio == 0.0


def test_stream_reads_never_overflow_a_tight_buffer(fixed_clock):
    block = 12 + PAYLOAD
    tracker = FrameTracker(deadline_ms=50)
    service = ReceiverService(
        Delivery.STREAM,
        tracker,
        fragment_payload_bytes=PAYLOAD,
        stream_buffer_bytes=2 * block,
        clock=fixed_clock,
        host="127.0.0.1",
    )
    assert service.read_size == block + 1

    service.start()
    sender = StreamSender(("127.0.0.1", service.port))
    try:
        assert sender.send(b"".join(_frame_units(4, 6, NOW_MS - 5)))
        assert _wait_for(lambda: tracker.on_time_frames == 1)
    finally:
        sender.close()
        service.stop()

    assert tracker.total_frames == 1
    assert tracker.incomplete_frames == 0


def test_stream_buffer_smaller_than_a_block_is_rejected():
    with pytest.raises(ValueError):
        ReceiverService(
            Delivery.STREAM,
            FrameTracker(),
            fragment_payload_bytes=PAYLOAD,
            stream_buffer_bytes=12 + PAYLOAD - 1,
        )


def test_stop_finalizes_even_when_a_queued_unit_is_malformed(fixed_clock):
    tracker = FrameTracker(deadline_ms=50)
    service = ReceiverService(
        Delivery.DATAGRAM,
        tracker,
        fragment_payload_bytes=PAYLOAD,
        clock=fixed_clock,
    )
    service._inbox.put(("downlink", None, _frame_units(2, 2, NOW_MS)[0], NOW_MS))
    service._inbox.put(("downlink", None, b"\x00" * 5, NOW_MS))

    with pytest.raises(MalformedHeader):
        service.stop()

    assert tracker.finalized
    assert tracker.total_frames == 1
    assert tracker.incomplete_frames == 1
