"""Tables and JSON-ready dicts for cgroup and namespace results."""

from dataclasses import asdict
from typing import Any

import psutil
from rich.console import Group
from rich.table import Table
from rich.text import Text

from isoscope.executor import ExecutionResult
from isoscope.models import (
    UNLIMITED,
    CgroupMetricsSnapshot,
    NamespaceComparison,
    NamespaceStatistics,
    ProcessNamespaceSet,
)

THROTTLE_WARNING_RATIO = 0.5
MEMORY_WARNING_RATIO = 0.9
MAJOR_FAULT_WARNING = 100

_MIB = 1024 * 1024


def format_bytes(size: float) -> str:
    """Format bytes as human-readable string."""
    for unit in ["B", "K", "M", "G", "T"]:
        if size < 1024:
            return f"{size:5.1f}{unit}" if unit != "B" else f"{int(size):5d}{unit}"
        size = size / 1024
    return f"{size:.1f}P"


def format_limit(value: int) -> str:
    """Format a byte limit; UNLIMITED prints as "unlimited"."""
    return "unlimited" if value == UNLIMITED else format_bytes(value)


def process_name(pid: int) -> str:
    """Short name of ``pid``, or "?" if it is gone or hidden."""
    try:
        return psutil.Process(pid).name()
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return "?"


def utilization_warnings(snapshot: CgroupMetricsSnapshot) -> list[str]:
    """Human-readable warnings for a cgroup close to its limits."""
    warnings = []
    cpu = snapshot.cpu
    if cpu.collected and cpu.limit_cores is not None:
        ratio = cpu.throttled_ratio
        if ratio is not None and ratio > THROTTLE_WARNING_RATIO:
            warnings.append(f"Heavy CPU throttling: {ratio:.0%} of periods throttled")
    memory = snapshot.memory
    if memory.collected and memory.usage_ratio is not None:
        if memory.usage_ratio > MEMORY_WARNING_RATIO:
            warnings.append(f"Near memory limit: {memory.usage_ratio:.0%} used")
        if memory.pgmajfault > MAJOR_FAULT_WARNING:
            warnings.append(f"High major page faults ({memory.pgmajfault})")
    return warnings


def _json_value(value: Any) -> Any:
    if value == UNLIMITED:
        return None
    return value


def snapshot_to_dict(snapshot: CgroupMetricsSnapshot) -> dict[str, Any]:
    """JSON-ready view of a snapshot; unlimited values become null."""
    info = snapshot.info
    result: dict[str, Any] = {
        "path": str(info.path),
        "name": info.name,
        "version": info.version.value,
        "pid": info.pid,
        "controllers": sorted(controller.value for controller in info.controllers_present),
    }
    for key in ("cpu", "memory", "blkio", "pids"):
        record = getattr(snapshot, key)
        result[key] = {name: _json_value(value) for name, value in asdict(record).items()}
    result["warnings"] = utilization_warnings(snapshot)
    return result


def namespace_set_to_dict(ns_set: ProcessNamespaceSet) -> dict[str, Any]:
    """JSON-ready form of a process's namespace set."""
    return {
        "pid": ns_set.pid,
        "namespaces": {
            entry.kind.value: entry.inode if entry.available else None for entry in ns_set.entries
        },
    }


def comparison_to_dict(pid_a: int, pid_b: int, comparisons: list[NamespaceComparison]) -> dict[str, Any]:
    """JSON-ready form of a namespace comparison."""
    return {
        "pid_a": pid_a,
        "pid_b": pid_b,
        "namespaces": [
            {
                "kind": comparison.kind.value,
                "shared": comparison.shared,
                "inode_a": comparison.inode_a,
                "inode_b": comparison.inode_b,
            }
            for comparison in comparisons
        ],
    }


def statistics_to_dict(stats: NamespaceStatistics) -> dict[str, Any]:
    """JSON-ready form of namespace statistics."""
    return {
        "total_processes_analyzed": stats.total_processes_analyzed,
        "cap": stats.cap,
        "unique": {kind.value: count for kind, count in stats.unique_counts.items()},
        "saturated": sorted(kind.value for kind in stats.saturated),
    }


def execution_result_to_dict(result: ExecutionResult) -> dict[str, Any]:
    """JSON-ready form of a confined run."""
    return {
        "exit_status": result.exit_status,
        "state": result.state.value,
        "cgroups": list(result.cgroup_paths),
        "limit_errors": [str(exc) for exc in result.limit_errors],
        "cleanup_errors": [str(exc) for exc in result.cleanup_errors],
        "metrics": snapshot_to_dict(result.snapshot) if result.snapshot else None,
    }


def render_snapshot(snapshot: CgroupMetricsSnapshot) -> Group:
    """Utilization-vs-limits report for one cgroup."""
    info = snapshot.info
    title = f"cgroup v{info.version.value} {info.path}"
    if info.pid is not None:
        title += f" (pid {info.pid})"

    table = Table(title=title, show_header=True, header_style="bold")
    table.add_column("Resource")
    table.add_column("Usage", justify="right")
    table.add_column("Limit", justify="right")
    table.add_column("Detail")

    cpu = snapshot.cpu
    if cpu.collected:
        limit = f"{cpu.limit_cores:.2f} cores" if cpu.limit_cores is not None else "unlimited"
        detail = f"user {cpu.user_usec / 1e6:.2f}s, system {cpu.system_usec / 1e6:.2f}s"
        if cpu.nr_periods:
            detail += (
                f", throttled {cpu.nr_throttled}/{cpu.nr_periods} periods"
                f" ({cpu.throttled_usec / 1e6:.2f}s)"
            )
        table.add_row("CPU", f"{cpu.usage_usec / 1e6:.2f}s", limit, detail)

    memory = snapshot.memory
    if memory.collected:
        detail = (
            f"peak {format_bytes(memory.peak).strip()}, rss {format_bytes(memory.rss).strip()},"
            f" cache {format_bytes(memory.cache).strip()}, swap {format_bytes(memory.swap_current).strip()}"
        )
        if memory.pgfault:
            detail += f", faults {memory.pgfault} (major {memory.pgmajfault})"
        table.add_row("Memory", format_bytes(memory.current), format_limit(memory.limit), detail)

    blkio = snapshot.blkio
    if blkio.collected:
        read_detail = f"{blkio.rios} ops"
        if blkio.rios:
            read_detail += f", avg {blkio.rbytes / blkio.rios / 1024:.2f}K"
        write_detail = f"{blkio.wios} ops"
        if blkio.wios:
            write_detail += f", avg {blkio.wbytes / blkio.wios / 1024:.2f}K"
        table.add_row("I/O read", format_bytes(blkio.rbytes), "", read_detail)
        table.add_row("I/O write", format_bytes(blkio.wbytes), "", write_detail)
        if blkio.dbytes:
            table.add_row("I/O discard", format_bytes(blkio.dbytes), "", f"{blkio.dios} ops")

    pids = snapshot.pids
    if pids.collected:
        limit = "unlimited" if pids.limit == UNLIMITED else str(pids.limit)
        table.add_row("PIDs", str(pids.current), limit, "")

    collected = ", ".join(controller.value for controller in snapshot.controllers_collected())
    parts: list[Any] = [table, Text(f"Controllers collected: {collected or 'none'}", style="dim")]
    for warning in utilization_warnings(snapshot):
        parts.append(Text(f"WARNING: {warning}", style="bold yellow"))
    return Group(*parts)


def render_utilization_comparison(rows: list[tuple[int, CgroupMetricsSnapshot | None]]) -> Table:
    """Side-by-side CPU / memory / I/O usage of several processes' cgroups."""
    table = Table(title=f"Cgroup utilization of {len(rows)} processes", show_footer=True)
    total_cpu = total_mem = total_io = 0.0
    body = []
    for pid, snapshot in rows:
        if snapshot is None:
            body.append((str(pid), "-", "-", "-"))
            continue
        cpu = snapshot.cpu.usage_usec / 1e6 if snapshot.cpu.collected else 0.0
        mem = snapshot.memory.current / _MIB if snapshot.memory.collected else 0.0
        io = (snapshot.blkio.rbytes + snapshot.blkio.wbytes) / _MIB if snapshot.blkio.collected else 0.0
        total_cpu += cpu
        total_mem += mem
        total_io += io
        body.append((str(pid), f"{cpu:.2f}", f"{mem:.2f}", f"{io:.2f}"))

    table.add_column("PID", footer="TOTAL")
    table.add_column("CPU (s)", justify="right", footer=f"{total_cpu:.2f}")
    table.add_column("Memory (MB)", justify="right", footer=f"{total_mem:.2f}")
    table.add_column("I/O (MB)", justify="right", footer=f"{total_io:.2f}")
    for row in body:
        table.add_row(*row)
    return table


def render_namespaces(ns_set: ProcessNamespaceSet) -> Table:
    """Table of one process's namespace memberships."""
    table = Table(
        title=f"Namespaces of pid {ns_set.pid} ({process_name(ns_set.pid)})",
        caption=f"{ns_set.available_count}/{len(ns_set.entries)} available",
    )
    table.add_column("Type")
    table.add_column("Available")
    table.add_column("Inode", justify="right")
    for entry in ns_set.entries:
        if entry.available:
            table.add_row(entry.kind.value, "yes", str(entry.inode))
        else:
            table.add_row(entry.kind.value, "no", "N/A")
    return table


def render_namespace_comparison(pid_a: int, pid_b: int, comparisons: list[NamespaceComparison]) -> Table:
    """Table comparing two processes, kind by kind."""
    shared = sum(1 for comparison in comparisons if comparison.shared)
    table = Table(
        title=f"Namespaces: pid {pid_a} vs pid {pid_b}",
        caption=f"Shared: {shared} | Isolated: {len(comparisons) - shared} | Total: {len(comparisons)}",
    )
    table.add_column("Type")
    table.add_column("Status")
    table.add_column(f"{pid_a} inode", justify="right")
    table.add_column(f"{pid_b} inode", justify="right")
    for comparison in comparisons:
        status = "[green]shared[/green]" if comparison.shared else "[red]isolated[/red]"
        table.add_row(comparison.kind.value, status, str(comparison.inode_a), str(comparison.inode_b))
    return table


def render_namespace_statistics(stats: NamespaceStatistics) -> Table:
    """Table of unique namespace counts per kind."""
    table = Table(
        title="System namespace statistics",
        caption=f"{stats.total_processes_analyzed} processes analyzed",
    )
    table.add_column("Type")
    table.add_column("Unique", justify="right")
    for kind, count in stats.unique_counts.items():
        value = f">= {count}" if kind in stats.saturated else str(count)
        table.add_row(kind.value, value)
    return table
