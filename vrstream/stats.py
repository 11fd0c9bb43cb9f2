from dataclasses import dataclass, asdict
from typing import Any, Dict, Sequence


@dataclass(frozen=True)
class DelayStats:
    count: int = 0
    avg: float = 0.0
    p99: int = 0
    max: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def percentile_index(count: int, fraction: float) -> int:
    """floor(count * fraction), clamped to the last element."""
    return min(int(count * fraction), count - 1)


def summarize(delays: Sequence[int]) -> DelayStats:
    """
    Average, p99 and max over a finished delay series.

    p99 is the ascending-sorted element at floor(count * 0.99); with
    100 samples or fewer that lands on the maximum. An empty series yields
    zeros.
    """
    if not delays:
        return DelayStats()

    ordered = sorted(delays)
    count = len(ordered)
    return DelayStats(
        count=count,
        avg=sum(ordered) / count,
        p99=ordered[percentile_index(count, 0.99)],
        max=ordered[-1],
    )
