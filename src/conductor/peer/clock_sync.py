"""
Clock-sync collaborator interface.

The synchronization service itself lives outside this package. Peers only
read ``time_offset`` to show how long ago a request was made; arbitration
correctness never depends on it.
"""

from typing import Protocol, runtime_checkable


@runtime_checkable
class ClockSync(Protocol):
    """Read-only view of a clock-synchronization service (all values in ms)."""

    @property
    def rtt(self) -> float: ...

    @property
    def time_offset(self) -> float: ...  # coordinator clock minus local clock

    @property
    def jitter(self) -> float: ...

    @property
    def drift(self) -> float: ...

    def force_batch_resync(self) -> None: ...


class StaticClockSync:
    """Fixed-offset clock sync, zero by default."""

    def __init__(self, time_offset: float = 0.0, rtt: float = 0.0) -> None:
        self._time_offset = time_offset
        self._rtt = rtt
        self.resyncs = 0

    @property
    def rtt(self) -> float:
        return self._rtt

    @property
    def time_offset(self) -> float:
        return self._time_offset

    @property
    def jitter(self) -> float:
        return 0.0

    @property
    def drift(self) -> float:
        return 0.0

    def force_batch_resync(self) -> None:
        self.resyncs += 1


def to_local_time(coordinator_ms: float, clock: ClockSync) -> float:
    """Convert a coordinator timestamp to the local clock."""
    return coordinator_ms - clock.time_offset


def format_time_ago(timestamp_ms: float, now_ms: float) -> str:
    """Render an age as ``"1m 5s ago"`` or ``"12s ago"``; future times clamp to 0s."""
    diff = max(int(now_ms - timestamp_ms), 0)
    minutes, remainder = divmod(diff, 60_000)
    seconds = remainder // 1000
    if minutes > 0:
        return f"{minutes}m {seconds}s ago"
    return f"{seconds}s ago"
