"""Data models for memlimit."""

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from enum import Enum


class Metric(Enum):
    """Memory figure compared against the limit."""

    RESIDENT = "resident"
    VIRTUAL = "virtual"


class WatchdogState(Enum):
    """States of the watchdog loop."""

    RUNNING = "running"
    EXCEEDED = "exceeded"
    CHILD_GONE = "child_gone"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not WatchdogState.RUNNING


@dataclass(slots=True, frozen=True)
class ProcessEntry:
    """Immutable record of one process in a snapshot."""

    pid: int
    parent_pid: int | None
    memory_rss: int  # Bytes
    memory_vms: int  # Bytes

    def memory(self, metric: Metric) -> int:
        """Return the figure selected by ``metric``."""
        if metric is Metric.VIRTUAL:
            return self.memory_vms
        return self.memory_rss


class ProcessSnapshot(Mapping[int, ProcessEntry]):
    """
    Point-in-time process table, keyed by pid.

    Built once per poll cycle and never mutated. It may already be stale
    relative to the live system by the time it is read.
    """

    __slots__ = ("_entries",)

    def __init__(self, entries: Iterable[ProcessEntry] = ()) -> None:
        self._entries: dict[int, ProcessEntry] = {entry.pid: entry for entry in entries}

    def __getitem__(self, pid: int) -> ProcessEntry:
        return self._entries[pid]

    def __iter__(self) -> Iterator[int]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"ProcessSnapshot({len(self._entries)} processes)"


@dataclass(slots=True, frozen=True)
class WatchdogConfig:
    """Settings fixed for the lifetime of one watchdog run."""

    limit: int  # Bytes
    metric: Metric = Metric.RESIDENT
    include_children: bool = False
    interval: float = 0.1  # Seconds between polls

    def __post_init__(self) -> None:
        if self.limit < 0:
            raise ValueError("limit must be non-negative")
        if self.interval < 0:
            raise ValueError("interval must be non-negative")
