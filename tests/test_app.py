"""Tests for the isoscope top application."""

from pathlib import Path

import pytest
from textual.widgets import DataTable

from conftest import host_namespaces, write_files
from isoscope.app import HeaderStats, IsoscopeApp, MetricsTable, NamespaceTable
from isoscope.models import (
    BlockIoMetrics,
    CgroupInfo,
    CgroupMetricsSnapshot,
    CgroupRates,
    CgroupVersion,
    CpuMetrics,
    MemoryMetrics,
    NamespaceIdentity,
    NamespaceKind,
    PidsMetrics,
    ProcessNamespaceSet,
)
from isoscope.monitor import MonitorSample, ProcessInfo


def _snapshot(**records) -> CgroupMetricsSnapshot:
    fields = {
        "cpu": CpuMetrics(usage_usec=2_000_000, quota=50000, period=100000, collected=True),
        "memory": MemoryMetrics(current=1048576, limit=2097152, collected=True),
        "blkio": BlockIoMetrics(),
        "pids": PidsMetrics(current=2, limit=10, collected=True),
    }
    fields.update(records)
    return CgroupMetricsSnapshot(
        info=CgroupInfo(Path("/sys/fs/cgroup/job"), "job", CgroupVersion.V2, 42),
        taken_at=1.0,
        **fields,
    )


def _sample(snapshot=None) -> MonitorSample:
    return MonitorSample(
        process=ProcessInfo(42, "worker", "root", "running", 3, "worker --serve"),
        snapshot=snapshot,
        rates=CgroupRates(elapsed=1.0, cpu_cores=0.5, read_bps=0, write_bps=4096, memory_delta_bps=0),
        namespaces=ProcessNamespaceSet(
            42, tuple(NamespaceIdentity(kind, 100 + kind.index, True) for kind in NamespaceKind)
        ),
    )


@pytest.fixture
def app(v2_settings, v2_root, add_process):
    write_files(v2_root / "job", {"cpu.stat": "usage_usec 1000\n"})
    add_process(42, cgroup="0::/job\n", namespaces=host_namespaces())
    return IsoscopeApp(42, poll_rate=0.1, settings=v2_settings)


def test_metrics_rows_skip_uncollected_controllers():
    """Test only collected controllers become rows."""
    rows = MetricsTable._rows(_snapshot())

    assert [row[0] for row in rows] == ["cpu", "memory", "pids"]
    assert rows[0][2] == "0.50 cores"
    assert rows[2][1:3] == ("2", "10")


def test_metrics_rows_unlimited():
    """Test unlimited limits are spelled out."""
    rows = MetricsTable._rows(_snapshot(cpu=CpuMetrics(collected=True), pids=PidsMetrics(collected=True)))

    assert rows[0][2] == "unlimited"
    assert rows[-1][2] == "unlimited"


@pytest.mark.asyncio
async def test_app_creation(app):
    """Test IsoscopeApp can be instantiated."""
    assert app.title == "isoscope"
    assert app.sub_title == "pid 42"
    assert app._monitor is not None
    assert app._update_queue is not None


@pytest.mark.asyncio
async def test_app_compose(app):
    """Test IsoscopeApp composes correctly."""
    async with app.run_test() as pilot:
        assert pilot.app.query_one("#header-stats") is not None
        assert pilot.app.query_one("#metrics-table") is not None
        assert pilot.app.query_one("#namespace-table") is not None


@pytest.mark.asyncio
async def test_app_quit_binding(app):
    """Test that 'q' binding triggers quit."""
    async with app.run_test() as pilot:
        await pilot.press("q")
        # App should be exiting
        assert pilot.app._exit
        assert not pilot.app._monitor.is_running


@pytest.mark.asyncio
async def test_update_ui(app):
    """Test a sample fills every widget."""
    async with app.run_test() as pilot:
        pilot.app.update_ui(_sample(_snapshot()))

        metrics = pilot.app.query_one("#metrics-table", DataTable)
        namespaces = pilot.app.query_one("#namespace-table", DataTable)
        header = pilot.app.query_one("#header-stats", HeaderStats)

        assert metrics.row_count == 3
        assert namespaces.row_count == 8
        assert "worker" in header._get_process_info()
        assert "0.50 cores" in header._get_rate_info()


@pytest.mark.asyncio
async def test_sample_without_snapshot_shows_error(app):
    """Test a failed cgroup read is shown in the header."""
    async with app.run_test() as pilot:
        sample = _sample()
        sample.error = "pid 42 has no unified (hierarchy 0) cgroup entry"
        pilot.app.update_ui(sample)

        header = pilot.app.query_one("#header-stats", HeaderStats)
        assert "hierarchy 0" in header._get_process_info()


@pytest.mark.asyncio
async def test_header_escapes_markup_in_process_text(app):
    """Test brackets in a command line or error are shown literally."""
    async with app.run_test() as pilot:
        sample = _sample()
        sample.process = ProcessInfo(42, "[b]worker", "root", "running", 1, "python -c print(a[1]) [/bold]")
        sample.error = "cannot read [/red] cgroup"
        pilot.app.update_ui(sample)
        await pilot.pause()

        info = pilot.app.query_one("#header-stats", HeaderStats)._get_process_info()
        assert "print(a[1]) \\[/bold]" in info
        assert "\\[b]worker" in info
        assert "cannot read \\[/red] cgroup" in info


@pytest.mark.asyncio
async def test_namespace_table_marks_unavailable(app):
    """Test unreadable namespaces show N/A."""
    async with app.run_test() as pilot:
        table = pilot.app.query_one(NamespaceTable)
        table.update_namespaces(ProcessNamespaceSet(42, tuple(NamespaceIdentity(kind) for kind in NamespaceKind)))

        data = pilot.app.query_one("#namespace-table", DataTable)
        assert data.get_cell("time", "inode") == "N/A"


@pytest.mark.asyncio
async def test_app_receives_updates_from_monitor(app):
    """Test that app receives updates from the cgroup monitor."""
    async with app.run_test() as pilot:
        # Wait for at least one update cycle
        await pilot.pause(1)

        assert app._monitor.is_running
        namespaces = pilot.app.query_one("#namespace-table", DataTable)
        assert namespaces.row_count == 8


@pytest.mark.asyncio
async def test_refresh_binding(app):
    """Test that 'r' polls immediately."""
    async with app.run_test() as pilot:
        await pilot.press("r")

        metrics = pilot.app.query_one("#metrics-table", DataTable)
        assert metrics.row_count >= 1
