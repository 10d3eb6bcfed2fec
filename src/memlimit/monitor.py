"""Process table collection for memlimit."""

from typing import Protocol

import psutil
import structlog

from memlimit.models import ProcessEntry, ProcessSnapshot

logger = structlog.get_logger()


class SnapshotSource(Protocol):
    """Anything that can produce a fresh process table on demand."""

    def refresh(self) -> ProcessSnapshot: ...


class PsutilSnapshotSource:
    """
    Snapshot source that reads the live process table using psutil.

    Processes that die mid-poll, deny access, or are zombies are handled
    gracefully. A failure to enumerate the table itself is not caught.
    """

    # Attributes to fetch per process
    ATTRS = ["pid", "ppid", "status", "memory_info"]

    def __init__(self) -> None:
        self._logger = logger.bind(component="snapshot_source")

    def refresh(self) -> ProcessSnapshot:
        """Collect a snapshot of all live processes."""
        entries: list[ProcessEntry] = []

        for proc in psutil.process_iter(attrs=self.ATTRS):
            try:
                info = proc.info

                # Exited but not yet reaped: holds no memory and is not live
                if info.get("status") == psutil.STATUS_ZOMBIE:
                    continue

                # Get memory figures, defaulting to 0 if unavailable
                mem_info = info.get("memory_info")
                entries.append(
                    ProcessEntry(
                        pid=info["pid"],
                        parent_pid=info.get("ppid"),
                        memory_rss=mem_info.rss if mem_info else 0,
                        memory_vms=mem_info.vms if mem_info else 0,
                    )
                )

            except (psutil.NoSuchProcess, psutil.ZombieProcess):
                # Died between enumeration and inspection
                continue

        snapshot = ProcessSnapshot(entries)
        self._logger.debug("snapshot_refreshed", processes=len(snapshot))
        return snapshot
