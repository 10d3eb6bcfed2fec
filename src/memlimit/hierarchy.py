"""Process tree discovery and memory aggregation over a snapshot."""

from collections.abc import Iterable

from memlimit.models import Metric, ProcessSnapshot


def expand_hierarchy(root_pid: int, snapshot: ProcessSnapshot, include_children: bool) -> frozenset[int]:
    """
    Return the pids under watch for this cycle.

    With ``include_children`` the result is the closure of ``root_pid`` over
    parent links: every entry whose parent is already in the set is added,
    scanning the whole snapshot until a pass adds nothing. Iteration order of
    the snapshot does not matter, and dangling or cyclic parent links never
    match anything that is not already reachable from the root.

    The root is always a member, whether or not it is in the snapshot.
    """
    hierarchy = {root_pid}
    if not include_children:
        return frozenset(hierarchy)

    while True:
        found = [
            pid
            for pid, entry in snapshot.items()
            if pid not in hierarchy and entry.parent_pid in hierarchy
        ]
        if not found:
            return frozenset(hierarchy)
        hierarchy.update(found)


def sum_memory(snapshot: ProcessSnapshot, pids: Iterable[int], metric: Metric) -> int:
    """Sum ``metric`` over ``pids``; pids missing from the snapshot count as zero."""
    total = 0
    for pid in pids:
        entry = snapshot.get(pid)
        if entry is not None:
            total += entry.memory(metric)
    return total
