import pytest

from vrstream.config import DownlinkConfig
from vrstream.protocol import decode_header
from vrstream.scheduler import EventScheduler, RealtimeScheduler
from vrstream.send_engine import DownlinkGenerator


def test_events_run_in_time_order_and_ties_in_schedule_order():
    sched = EventScheduler()
    seen = []

    sched.schedule(300, seen.append, "c")
    sched.schedule(100, seen.append, "a1")
    sched.schedule(100, seen.append, "a2")
    sched.schedule(200, seen.append, "b")
    sched.schedule(100, seen.append, "a3")

    sched.run()

    assert seen == ["a1", "a2", "a3", "b", "c"]
    assert sched.now_us == 300
    assert sched.events_processed == 5


def test_run_until_leaves_later_events_unrun():
    sched = EventScheduler()
    seen = []

    sched.schedule_at(1000, seen.append, 1)
    sched.schedule_at(2000, seen.append, 2)
    sched.schedule_at(2001, seen.append, 3)

    sched.run(until_us=2000)

    assert seen == [1, 2]
    assert sched.pending == 1
    assert sched.now_us == 2000
    assert sched.now_ms() == 2


def test_callbacks_can_schedule_relative_to_now():
    sched = EventScheduler(start_us=500)
    times = []

    def tick(n):
        times.append(sched.now_us)
        if n > 0:
            sched.schedule(250, tick, n - 1)

    sched.schedule(0, tick, 3)
    sched.run()

    assert times == [500, 750, 1000, 1250]


def test_negative_delay_is_rejected():
    sched = EventScheduler()
    with pytest.raises(ValueError):
        sched.schedule(-1, lambda: None)


def test_stop_halts_processing():
    sched = EventScheduler()
    seen = []

    sched.schedule(10, seen.append, "first")
    sched.schedule(20, sched.stop)
    sched.schedule(30, seen.append, "never")

    sched.run()

    assert seen == ["first"]
    assert sched.pending == 1


class FakeClock:
    def __init__(self, start: float):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def test_realtime_scheduler_sleeps_until_due():
    clock = FakeClock(100.0)
    sched = RealtimeScheduler(clock=clock, sleep=clock.sleep)
    fired = []

    sched.schedule(500, lambda: fired.append(clock.now))
    sched.run()

    assert len(fired) == 1
    assert clock.sleeps == [pytest.approx(0.0005)]
    assert fired[0] == pytest.approx(100.0005)


def test_realtime_scheduler_does_not_sleep_for_overdue_events():
    clock = FakeClock(50.0)
    sched = RealtimeScheduler(clock=clock, sleep=clock.sleep)
    fired = []

    sched.schedule(1000, fired.append, "late")
    clock.now += 0.01  # the caller overran by 10ms before run()
    sched.run()

    assert fired == ["late"]
    assert clock.sleeps == []


def test_realtime_scheduler_drives_a_downlink_generator():
    clock = FakeClock(100.0)
    sched = RealtimeScheduler(clock=clock, sleep=clock.sleep)
    sent = []
    config = DownlinkConfig(frame_interval_ms=10, frame_size_bytes=30, fragment_payload_bytes=10)
    gen = DownlinkGenerator(config, sched, sent.append)

    sched.schedule(0, gen.start)
    sched.schedule(25000, gen.stop)
    sched.run()

    headers = [decode_header(unit) for unit in sent]
    assert gen.frames_sent == 3
    assert [(h.frame_id, h.fragment_index) for h in headers] == [
        (f, i) for f in range(3) for i in range(3)
    ]
    frame_ts = [h.send_timestamp_ms for h in headers[::3]]
    assert [b - a for a, b in zip(frame_ts, frame_ts[1:])] == [pytest.approx(10, abs=1)] * 2
    # Woke for frames at 10ms and 20ms, the stop at 25ms, and the no-op tick at 30ms.
    assert sum(clock.sleeps) == pytest.approx(0.03, abs=1e-5)
    assert not gen.running
