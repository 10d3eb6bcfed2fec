"""Tests for process tree expansion and memory aggregation."""

import itertools
import random

import pytest

from memlimit.hierarchy import expand_hierarchy, sum_memory
from memlimit.models import Metric, ProcessEntry, ProcessSnapshot


def entry(pid: int, parent: int | None, rss: int = 0, vms: int = 0) -> ProcessEntry:
    return ProcessEntry(pid=pid, parent_pid=parent, memory_rss=rss, memory_vms=vms)


@pytest.fixture
def tree_entries() -> list[ProcessEntry]:
    """
    1 ── 100 ─┬─ 101 ── 103 ── 104
              └─ 102
    1 ── 200 ── 201
    """
    return [
        entry(1, None, rss=5000),
        entry(100, 1, rss=1000, vms=10000),
        entry(101, 100, rss=200, vms=2000),
        entry(102, 100, rss=300, vms=3000),
        entry(103, 101, rss=40, vms=400),
        entry(104, 103, rss=5, vms=50),
        entry(200, 1, rss=7000),
        entry(201, 200, rss=8000),
    ]


class TestExpandHierarchy:
    """Tests for expand_hierarchy."""

    def test_without_children_only_root(self, tree_entries):
        snapshot = ProcessSnapshot(tree_entries)

        assert expand_hierarchy(100, snapshot, include_children=False) == {100}

    def test_without_children_root_need_not_exist(self):
        assert expand_hierarchy(7, ProcessSnapshot(), include_children=False) == {7}

    def test_with_children_full_subtree(self, tree_entries):
        snapshot = ProcessSnapshot(tree_entries)

        assert expand_hierarchy(100, snapshot, include_children=True) == {100, 101, 102, 103, 104}

    def test_leaf_has_no_descendants(self, tree_entries):
        snapshot = ProcessSnapshot(tree_entries)

        assert expand_hierarchy(104, snapshot, include_children=True) == {104}

    def test_root_missing_from_snapshot_is_still_member(self, tree_entries):
        """Test orphans of a vanished root are still found through it."""
        snapshot = ProcessSnapshot(e for e in tree_entries if e.pid != 100)

        assert expand_hierarchy(100, snapshot, include_children=True) == {100, 101, 102, 103, 104}

    def test_children_listed_before_parents(self, tree_entries):
        snapshot = ProcessSnapshot(reversed(tree_entries))

        assert expand_hierarchy(100, snapshot, include_children=True) == {100, 101, 102, 103, 104}

    def test_invariant_under_permutation(self, tree_entries):
        """Test every ordering of the snapshot gives the same result."""
        expected = expand_hierarchy(100, ProcessSnapshot(tree_entries), include_children=True)

        for order in itertools.permutations(tree_entries):
            assert expand_hierarchy(100, ProcessSnapshot(order), include_children=True) == expected

    def test_dangling_parent_is_ignored(self, tree_entries):
        snapshot = ProcessSnapshot([*tree_entries, entry(300, 999), entry(301, 300)])

        assert expand_hierarchy(100, snapshot, include_children=True) == {100, 101, 102, 103, 104}

    def test_cycle_terminates(self):
        """Test a parent cycle not reachable from the root is never entered."""
        snapshot = ProcessSnapshot([entry(10, None), entry(20, 30), entry(30, 20)])

        assert expand_hierarchy(10, snapshot, include_children=True) == {10}

    def test_cycle_through_root_terminates(self):
        snapshot = ProcessSnapshot([entry(10, 20), entry(20, 10), entry(30, 20)])

        assert expand_hierarchy(10, snapshot, include_children=True) == {10, 20, 30}

    def test_deep_chain(self):
        """Test a long chain in worst-case order is fully discovered."""
        chain = [entry(pid, pid - 1) for pid in range(1, 300)]
        snapshot = ProcessSnapshot(reversed(chain))

        assert expand_hierarchy(1, snapshot, include_children=True) == set(range(1, 300))

    def test_random_forest_matches_reference_walk(self):
        """Test against a parent-walk of every process on a random forest."""
        rng = random.Random(1234)
        entries = [entry(0, None)]
        for pid in range(1, 500):
            entries.append(entry(pid, rng.choice([None, rng.randrange(pid)])))
        rng.shuffle(entries)
        parents = {e.pid: e.parent_pid for e in entries}

        def descends_from(pid: int, root: int) -> bool:
            while pid is not None:
                if pid == root:
                    return True
                pid = parents[pid]
            return False

        snapshot = ProcessSnapshot(entries)
        for root in (0, 1, 17, 250):
            expected = {pid for pid in parents if descends_from(pid, root)}
            assert expand_hierarchy(root, snapshot, include_children=True) == expected


class TestSumMemory:
    """Tests for sum_memory."""

    def test_resident_sum(self, tree_entries):
        snapshot = ProcessSnapshot(tree_entries)

        assert sum_memory(snapshot, {100, 101, 102}, Metric.RESIDENT) == 1500

    def test_virtual_sum(self, tree_entries):
        snapshot = ProcessSnapshot(tree_entries)

        assert sum_memory(snapshot, {100, 101, 102}, Metric.VIRTUAL) == 15000

    def test_missing_pids_count_as_zero(self, tree_entries):
        snapshot = ProcessSnapshot(tree_entries)

        assert sum_memory(snapshot, {100, 9999}, Metric.RESIDENT) == 1000
        assert sum_memory(snapshot, set(), Metric.RESIDENT) == 0

    def test_large_totals_are_exact(self):
        snapshot = ProcessSnapshot([entry(1, None, rss=2**63), entry(2, 1, rss=2**63 - 1)])

        assert sum_memory(snapshot, {1, 2}, Metric.RESIDENT) == 2**64 - 1

    def test_children_flag_decides_breach(self):
        """Test a limit between m0 and m0+m1+m2 is only exceeded with children."""
        m0, m1, m2 = 1000, 400, 600
        snapshot = ProcessSnapshot([entry(10, 1, rss=m0), entry(11, 10, rss=m1), entry(12, 10, rss=m2)])
        limit = 1500

        alone = sum_memory(snapshot, expand_hierarchy(10, snapshot, False), Metric.RESIDENT)
        tree = sum_memory(snapshot, expand_hierarchy(10, snapshot, True), Metric.RESIDENT)

        assert alone == m0
        assert tree == m0 + m1 + m2
        assert not alone > limit
        assert tree > limit
