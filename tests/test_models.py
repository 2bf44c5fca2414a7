"""Tests for isoscope data models."""

import pytest

from isoscope.models import (
    UNLIMITED,
    CgroupHandle,
    CgroupVersion,
    Controller,
    CpuMetrics,
    MemoryMetrics,
    NamespaceIdentity,
    NamespaceKind,
    PidsMetrics,
    ProcessNamespaceSet,
)


def _full_set(pid: int = 1) -> ProcessNamespaceSet:
    return ProcessNamespaceSet(
        pid, tuple(NamespaceIdentity(kind, 4026531835 + kind.index, True) for kind in NamespaceKind)
    )


def test_cpu_metrics_defaults_are_uncollected_and_unlimited():
    """Test a default CpuMetrics reads as "not collected, no limit"."""
    cpu = CpuMetrics()

    assert not cpu.collected
    assert cpu.quota == -1
    assert cpu.limit_cores is None
    assert cpu.throttled_ratio is None


def test_cpu_metrics_limit_cores():
    """Test quota/period converts to a core count."""
    cpu = CpuMetrics(quota=50000, period=100000, nr_periods=10, nr_throttled=6, collected=True)

    assert cpu.limit_cores == 0.5
    assert cpu.throttled_ratio == 0.6


def test_memory_metrics_usage_ratio():
    """Test usage ratio is only defined under a real limit."""
    assert MemoryMetrics(current=512, limit=1024, collected=True).usage_ratio == 0.5
    assert MemoryMetrics(current=512, collected=True).usage_ratio is None
    assert MemoryMetrics(current=512, limit=0, collected=True).usage_ratio is None


def test_pids_metrics_default_limit_is_unlimited():
    """Test PidsMetrics uses the reserved unlimited value by default."""
    pids = PidsMetrics(current=3, collected=True)

    assert pids.limit == UNLIMITED
    assert pids.usage_ratio is None
    assert PidsMetrics(current=3, limit=4, collected=True).usage_ratio == 0.75


def test_metrics_are_frozen():
    """Test that metric records are immutable (frozen)."""
    memory = MemoryMetrics(current=1)

    with pytest.raises(AttributeError):
        memory.current = 2


def test_metrics_use_slots():
    """Test that records use __slots__ for memory efficiency."""
    # Slots-based dataclasses don't have __dict__
    assert not hasattr(CpuMetrics(), "__dict__")
    assert not hasattr(NamespaceIdentity(NamespaceKind.NET), "__dict__")


def test_controller_from_name():
    """Test known controller names map to members and unknown ones to None."""
    assert Controller.from_name("memory") is Controller.MEMORY
    assert Controller.from_name("cpuacct") is None


def test_cgroup_handle_name():
    """Test the handle name is the last path component."""
    from pathlib import Path

    handle = CgroupHandle(Path("/sys/fs/cgroup/isoscope-1"), CgroupVersion.V2)
    assert handle.name == "isoscope-1"


class TestNamespaceKind:
    """Tests for NamespaceKind ordering."""

    def test_there_are_eight_kinds(self):
        """Test all eight namespace types are modelled."""
        assert [kind.value for kind in NamespaceKind] == [
            "cgroup", "ipc", "mnt", "net", "pid", "time", "user", "uts",
        ]

    def test_index_follows_declaration_order(self):
        """Test index matches position."""
        assert [kind.index for kind in NamespaceKind] == list(range(8))


class TestProcessNamespaceSet:
    """Tests for ProcessNamespaceSet invariants."""

    def test_lookup_by_kind(self):
        """Test entries can be looked up by kind."""
        ns_set = _full_set()

        assert ns_set[NamespaceKind.NET].kind is NamespaceKind.NET
        assert ns_set.available_count == 8

    def test_rejects_missing_kind(self):
        """Test a set without every kind is refused."""
        entries = tuple(NamespaceIdentity(kind) for kind in NamespaceKind if kind is not NamespaceKind.TIME)

        with pytest.raises(ValueError):
            ProcessNamespaceSet(1, entries)

    def test_rejects_out_of_order_entries(self):
        """Test entries must follow kind order."""
        entries = tuple(reversed([NamespaceIdentity(kind) for kind in NamespaceKind]))

        with pytest.raises(ValueError):
            ProcessNamespaceSet(1, entries)

    def test_unavailable_entries_are_counted_out(self):
        """Test available_count ignores unreadable kinds."""
        entries = tuple(
            NamespaceIdentity(kind, 7, kind is not NamespaceKind.TIME) for kind in NamespaceKind
        )

        assert ProcessNamespaceSet(1, entries).available_count == 7
