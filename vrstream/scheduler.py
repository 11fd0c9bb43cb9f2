import heapq
import time
import logging
from typing import Any, Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)

US_PER_MS = 1000


def monotonic_ms() -> int:
    return int(time.monotonic() * 1000)


class EventScheduler:
    """
    Discrete-event scheduler on a simulated microsecond clock.

    Callbacks run to completion in non-decreasing time order. Events that
    share a timestamp run in the order they were scheduled.
    """

    def __init__(self, start_us: int = 0):
        self._now_us = int(start_us)
        self._events: List[Tuple[int, int, Callable[..., Any], tuple]] = []
        self._seq = 0
        self._stopped = False
        self.events_processed = 0

    @property
    def now_us(self) -> int:
        return self._now_us

    def now_ms(self) -> int:
        return self.now_us // US_PER_MS

    @property
    def pending(self) -> int:
        return len(self._events)

    def schedule(self, delay_us: int, callback: Callable[..., Any], *args: Any) -> None:
        if delay_us < 0:
            raise ValueError(f"cannot schedule into the past: delay_us={delay_us}")
        self.schedule_at(self.now_us + int(delay_us), callback, *args)

    def schedule_at(self, time_us: int, callback: Callable[..., Any], *args: Any) -> None:
        heapq.heappush(self._events, (int(time_us), self._seq, callback, args))
        self._seq += 1

    def stop(self) -> None:
        self._stopped = True

    def run(self, until_us: Optional[int] = None) -> None:
        """
        Process events until the queue drains, stop() is called, or the
        next event lies beyond until_us. Events left past until_us are
        never invoked.
        """
        self._stopped = False
        while self._events and not self._stopped:
            time_us = self._events[0][0]
            if until_us is not None and time_us > until_us:
                break
            _, _, callback, args = heapq.heappop(self._events)
            self._advance_to(time_us)
            callback(*args)
            self.events_processed += 1

        if until_us is not None and not self._stopped:
            self._advance_to(until_us)

    def _advance_to(self, time_us: int) -> None:
        if time_us > self._now_us:
            self._now_us = time_us


class RealtimeScheduler(EventScheduler):
    """
    Same interface, driven by the host monotonic clock.

    Time is absolute monotonic microseconds so that timestamps taken here
    can be compared with monotonic_ms() readings in another process on
    the same host. Handlers that overrun simply push later events back.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, sleep: Callable[[float], None] = time.sleep):
        self._clock = clock
        self._sleep = sleep
        super().__init__(start_us=self._read_clock())

    def _read_clock(self) -> int:
        return int(self._clock() * 1_000_000)

    @property
    def now_us(self) -> int:
        return self._read_clock()

    def run(self, until_us: Optional[int] = None) -> None:
        logger.info("Realtime scheduler running (%d events pending)", self.pending)
        super().run(until_us)
        logger.info("Realtime scheduler stopped after %d events", self.events_processed)

    def _advance_to(self, time_us: int) -> None:
        wait_us = time_us - self._read_clock()
        if wait_us > 0:
            self._sleep(wait_us / 1_000_000)
