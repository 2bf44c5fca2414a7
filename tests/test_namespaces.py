"""Tests for NamespaceInspector against a fake procfs."""

import os

import pytest

from conftest import host_namespaces
from isoscope.errors import NotFound, PermissionDenied, PreconditionViolated
from isoscope.models import NamespaceKind
from isoscope.namespaces import NamespaceInspector


@pytest.fixture
def inspector(v2_settings):
    return NamespaceInspector(v2_settings)


class TestListNamespaces:
    """Tests for list_namespaces."""

    def test_lists_all_eight_kinds(self, inspector, add_process):
        """Test every kind is present, in order, with its inode."""
        add_process(1, namespaces=host_namespaces())

        ns_set = inspector.list_namespaces(1)

        assert ns_set.pid == 1
        assert [entry.kind for entry in ns_set.entries] == list(NamespaceKind)
        assert ns_set.available_count == 8
        assert all(entry.inode > 0 for entry in ns_set.entries)

    def test_unreadable_kind_is_unavailable(self, inspector, add_process):
        """Test a kind without an ns link is reported unavailable."""
        namespaces = host_namespaces()
        del namespaces[NamespaceKind.TIME]
        add_process(7, namespaces=namespaces)

        ns_set = inspector.list_namespaces(7)

        assert not ns_set[NamespaceKind.TIME].available
        assert ns_set.available_count == 7

    def test_missing_process(self, inspector):
        """Test a pid that does not exist yields nothing available."""
        ns_set = inspector.list_namespaces(99999)

        assert len(ns_set.entries) == 8
        assert ns_set.available_count == 0

    def test_identity_is_the_link_target_inode(self, inspector, add_process):
        """Test processes linked to the same namespace get the same inode."""
        add_process(1, namespaces=host_namespaces())
        add_process(2, namespaces=host_namespaces(net="container"))

        a = inspector.list_namespaces(1)
        b = inspector.list_namespaces(2)

        assert a[NamespaceKind.UTS].inode == b[NamespaceKind.UTS].inode
        assert a[NamespaceKind.NET].inode != b[NamespaceKind.NET].inode


class TestCompare:
    """Tests for compare."""

    def test_self_comparison_is_all_shared(self, inspector, add_process):
        """Test a process shares every namespace with itself."""
        add_process(1, namespaces=host_namespaces())

        comparisons = inspector.compare(1, 1)

        assert len(comparisons) == 8
        assert all(comparison.shared for comparison in comparisons)

    def test_compare_is_symmetric(self, inspector, add_process):
        """Test swapping the pids gives the same shared flags."""
        add_process(1, namespaces=host_namespaces())
        add_process(2, namespaces=host_namespaces(net="c", pid="c", mnt="c"))

        forward = {c.kind: c.shared for c in inspector.compare(1, 2)}
        backward = {c.kind: c.shared for c in inspector.compare(2, 1)}

        assert forward == backward
        assert {kind for kind, shared in forward.items() if not shared} == {
            NamespaceKind.NET, NamespaceKind.PID, NamespaceKind.MNT,
        }

    def test_only_kinds_available_on_both(self, inspector, add_process):
        """Test kinds missing on either side are left out."""
        add_process(1, namespaces=host_namespaces())
        partial = host_namespaces()
        del partial[NamespaceKind.TIME]
        add_process(2, namespaces=partial)

        kinds = [comparison.kind for comparison in inspector.compare(1, 2)]

        assert NamespaceKind.TIME not in kinds
        assert len(kinds) == 7


class TestIsIsolated:
    """Tests for is_isolated."""

    def test_isolation_against_init(self, inspector, add_process):
        """Test isolation is judged against pid 1."""
        add_process(1, namespaces=host_namespaces())
        add_process(42, namespaces=host_namespaces(net="container"))

        assert inspector.is_isolated(42, NamespaceKind.NET)
        assert not inspector.is_isolated(42, NamespaceKind.UTS)
        assert not inspector.is_isolated(1, NamespaceKind.NET)

    def test_unreadable_process(self, inspector, add_process):
        """Test an unreadable target raises NotFound."""
        add_process(1, namespaces=host_namespaces())

        with pytest.raises(NotFound):
            inspector.is_isolated(42, NamespaceKind.NET)

    def test_unreadable_init(self, inspector, add_process):
        """Test an unreadable pid 1 raises NotFound."""
        add_process(42, namespaces=host_namespaces())

        with pytest.raises(NotFound):
            inspector.is_isolated(42, NamespaceKind.NET)


class TestFindInNamespace:
    """Tests for find_in_namespace."""

    def test_finds_members(self, inspector, add_process):
        """Test every process in the namespace is found and no other."""
        add_process(1, namespaces=host_namespaces())
        for pid in (10, 11, 12):
            add_process(pid, namespaces=host_namespaces(net="container"))
        inode = inspector.list_namespaces(10)[NamespaceKind.NET].inode

        assert sorted(inspector.find_in_namespace(inode, NamespaceKind.NET, 100)) == [10, 11, 12]

    def test_limit(self, inspector, add_process):
        """Test at most ``limit`` pids are returned."""
        for pid in range(2, 8):
            add_process(pid, namespaces=host_namespaces())
        inode = inspector.list_namespaces(2)[NamespaceKind.IPC].inode

        assert len(inspector.find_in_namespace(inode, NamespaceKind.IPC, 3)) == 3

    def test_unknown_inode(self, inspector, add_process):
        """Test an inode nobody is in gives an empty list."""
        add_process(1, namespaces=host_namespaces())

        assert inspector.find_in_namespace(1, NamespaceKind.NET, 10) == []

    def test_limit_must_be_positive(self, inspector):
        """Test a zero limit is refused."""
        with pytest.raises(PreconditionViolated):
            inspector.find_in_namespace(1, NamespaceKind.NET, 0)


class TestStatistics:
    """Tests for statistics."""

    def test_counts_unique_namespaces(self, inspector, add_process, proc_root):
        """Test distinct inodes are counted per kind across processes."""
        add_process(1, namespaces=host_namespaces())
        add_process(2, namespaces=host_namespaces(net="a"))
        add_process(3, namespaces=host_namespaces(net="b", uts="b"))
        add_process(4)  # kernel thread style: no readable ns links
        (proc_root / "sys").mkdir()
        (proc_root / "self").symlink_to(proc_root / "1")

        stats = inspector.statistics()

        assert stats.total_processes_analyzed == 4
        assert stats.unique_counts[NamespaceKind.NET] == 3
        assert stats.unique_counts[NamespaceKind.UTS] == 2
        assert stats.unique_counts[NamespaceKind.PID] == 1
        assert stats.cap == 1024
        assert stats.saturated == frozenset()

    def test_cap_saturation(self, inspector, add_process):
        """Test a kind over the cap is reported saturated and clamped."""
        for pid, net in ((1, "a"), (2, "b"), (3, "c"), (4, "d")):
            add_process(pid, namespaces=host_namespaces(net=net))

        stats = inspector.statistics(cap=2)

        assert stats.unique_counts[NamespaceKind.NET] == 2
        assert stats.saturated == frozenset({NamespaceKind.NET})
        assert stats.unique_counts[NamespaceKind.IPC] == 1

    def test_counts_never_exceed_cap(self, inspector, add_process):
        """Test the per-kind count is bounded by the cap."""
        for pid in range(1, 20):
            add_process(pid, namespaces=host_namespaces(net=str(pid), uts=str(pid)))

        stats = inspector.statistics(cap=5)

        assert all(count <= 5 for count in stats.unique_counts.values())

    def test_cap_must_be_positive(self, inspector):
        """Test a zero cap is refused."""
        with pytest.raises(PreconditionViolated):
            inspector.statistics(cap=0)


class TestMeasureCreationTime:
    """Tests for measure_creation_time, with fork stubbed out."""

    def test_time_namespace_is_refused(self, inspector):
        """Test the time namespace cannot be measured."""
        with pytest.raises(PreconditionViolated):
            inspector.measure_creation_time(NamespaceKind.TIME)

    def test_success_returns_microseconds(self, inspector, monkeypatch):
        """Test a child that unshared successfully yields a positive duration."""
        monkeypatch.setattr(os, "fork", lambda: 4242)
        monkeypatch.setattr(os, "waitpid", lambda pid, options: (pid, 0))

        assert inspector.measure_creation_time(NamespaceKind.UTS) >= 0

    def test_failed_unshare(self, inspector, monkeypatch):
        """Test a child that exited 1 surfaces as PermissionDenied."""
        monkeypatch.setattr(os, "fork", lambda: 4242)
        monkeypatch.setattr(os, "waitpid", lambda pid, options: (pid, 1 << 8))

        with pytest.raises(PermissionDenied):
            inspector.measure_creation_time(NamespaceKind.NET)
