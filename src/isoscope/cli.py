"""Command line interface for isoscope."""

import argparse
import json
import logging
import os
import sys
import threading
from collections.abc import Sequence
from typing import Any

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from isoscope.config import Settings
from isoscope.errors import IsoscopeError, NotFound
from isoscope.executor import ChildProcess, ConfinedExecutor, ExecutionLimits, IoLimit
from isoscope.metrics import MetricReader
from isoscope.models import NamespaceKind
from isoscope.namespaces import NamespaceInspector
from isoscope import report

logger = logging.getLogger("isoscope")

console = Console()
err_console = Console(stderr=True)


def _pid(value: str) -> int:
    """Parse a pid argument; "self" is the current process."""
    if value == "self":
        return os.getpid()
    try:
        pid = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid pid {value!r}") from None
    if pid <= 0:
        raise argparse.ArgumentTypeError(f"invalid pid {value!r}")
    return pid


def _kind(value: str) -> NamespaceKind:
    """Parse a namespace kind argument."""
    try:
        return NamespaceKind(value)
    except ValueError:
        choices = ", ".join(kind.value for kind in NamespaceKind)
        raise argparse.ArgumentTypeError(f"unknown namespace {value!r} (choose from {choices})") from None


def _io_limit(value: str) -> IoLimit:
    # MAJOR:MINOR:RBPS:WBPS
    parts = value.split(":")
    if len(parts) != 4 or not all(part.isascii() and part.isdigit() for part in parts):
        raise argparse.ArgumentTypeError(f"expected MAJOR:MINOR:RBPS:WBPS, got {value!r}")
    return IoLimit(f"{parts[0]}:{parts[1]}", int(parts[2]), int(parts[3]))


def _positive_float(value: str) -> float:
    number = float(value)
    if number <= 0:
        raise argparse.ArgumentTypeError("must be positive")
    return number


def _positive_int(value: str) -> int:
    number = int(value)
    if number <= 0:
        raise argparse.ArgumentTypeError("must be positive")
    return number


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with one subcommand per operation."""
    parser = argparse.ArgumentParser(
        prog="isoscope",
        description="Inspect and control cgroups and namespaces of Linux processes.",
    )
    parser.add_argument("-v", "--verbose", action="count", default=0, help="more logging (-vv for debug)")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("cgroup", help="cgroup utilization report for a process")
    p.add_argument("pid", type=_pid)
    p.add_argument("--json", action="store_true")

    p = sub.add_parser("cgroup-compare", help="compare cgroup utilization of several processes")
    p.add_argument("pids", type=_pid, nargs="+")
    p.add_argument("--json", action="store_true")

    p = sub.add_parser("ns", help="list the namespaces of a process")
    p.add_argument("pid", type=_pid)
    p.add_argument("--json", action="store_true")

    p = sub.add_parser("ns-compare", help="compare the namespaces of two processes")
    p.add_argument("pid_a", type=_pid)
    p.add_argument("pid_b", type=_pid)
    p.add_argument("--json", action="store_true")

    p = sub.add_parser("ns-isolated", help="is a process isolated from pid 1 in a namespace?")
    p.add_argument("pid", type=_pid)
    p.add_argument("kind", type=_kind)

    p = sub.add_parser("ns-find", help="list processes inside a namespace")
    p.add_argument("kind", type=_kind)
    p.add_argument("inode", type=int)
    p.add_argument("--limit", type=_positive_int, default=1024)

    p = sub.add_parser("ns-stats", help="system-wide namespace statistics")
    p.add_argument("--cap", type=_positive_int, default=None, help="distinct inodes recorded per type")
    p.add_argument("--json", action="store_true")

    p = sub.add_parser("ns-bench", help="time the creation of a namespace")
    p.add_argument("kind", type=_kind)
    p.add_argument("--runs", type=_positive_int, default=1)

    p = sub.add_parser("run", help="run a command inside a new, limited cgroup")
    p.add_argument("--cpu", type=_positive_float, help="CPU limit in cores (e.g. 0.5)")
    p.add_argument("--memory", type=_positive_int, help="memory limit in MB")
    p.add_argument("--pids", type=_positive_int, help="maximum number of tasks")
    p.add_argument("--io", type=_io_limit, action="append", default=[], help="MAJOR:MINOR:RBPS:WBPS")
    p.add_argument("--timeout", type=_positive_float, help="kill the command after this many seconds")
    p.add_argument("--name", help="cgroup name (default: generated)")
    p.add_argument("--json", action="store_true")
    p.add_argument("argv", nargs=argparse.REMAINDER, help="command to run (after --)")

    p = sub.add_parser("top", help="live view of a process's cgroup and namespaces")
    p.add_argument("pid", type=_pid)
    p.add_argument("--interval", type=_positive_float, default=1.0)

    return parser


def configure_logging(verbosity: int, settings: Settings) -> None:
    """Route logging through a RichHandler on stderr."""
    if verbosity >= 2:
        level = logging.DEBUG
    elif verbosity == 1:
        level = logging.INFO
    else:
        level = logging.getLevelName(settings.log_level)
        if not isinstance(level, int):
            level = logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False)],
    )


def _emit(data: Any) -> None:
    """Print ``data`` as indented JSON."""
    console.print_json(json.dumps(data))


def cmd_cgroup(args: argparse.Namespace, settings: Settings) -> int:
    """Report the cgroup metrics of one process."""
    snapshot = MetricReader(settings).snapshot_for_pid(args.pid)
    if args.json:
        _emit(report.snapshot_to_dict(snapshot))
    else:
        console.print(report.render_snapshot(snapshot))
    return 0


def cmd_cgroup_compare(args: argparse.Namespace, settings: Settings) -> int:
    """Report cgroup metrics of several processes side by side."""
    reader = MetricReader(settings)
    rows = []
    for pid in args.pids:
        try:
            rows.append((pid, reader.snapshot_for_pid(pid)))
        except NotFound as exc:
            logger.warning("skipping pid %d: %s", pid, exc)
            rows.append((pid, None))
    if args.json:
        _emit([
            {"pid": pid, "metrics": report.snapshot_to_dict(snapshot) if snapshot else None}
            for pid, snapshot in rows
        ])
    else:
        console.print(report.render_utilization_comparison(rows))
    return 0


def cmd_ns(args: argparse.Namespace, settings: Settings) -> int:
    """List the namespaces of one process."""
    ns_set = NamespaceInspector(settings).list_namespaces(args.pid)
    if ns_set.available_count == 0:
        raise NotFound(f"no namespaces readable for pid {args.pid}")
    if args.json:
        _emit(report.namespace_set_to_dict(ns_set))
    else:
        console.print(report.render_namespaces(ns_set))
    return 0


def cmd_ns_compare(args: argparse.Namespace, settings: Settings) -> int:
    """Compare the namespaces of two processes."""
    comparisons = NamespaceInspector(settings).compare(args.pid_a, args.pid_b)
    if args.json:
        _emit(report.comparison_to_dict(args.pid_a, args.pid_b, comparisons))
    else:
        console.print(report.render_namespace_comparison(args.pid_a, args.pid_b, comparisons))
    return 0


def cmd_ns_isolated(args: argparse.Namespace, settings: Settings) -> int:
    """Tell whether a process is isolated from pid 1 in one namespace."""
    isolated = NamespaceInspector(settings).is_isolated(args.pid, args.kind)
    verdict = "isolated from" if isolated else "shares"
    console.print(f"pid {args.pid} {verdict} the {args.kind.value} namespace of pid 1")
    return 0


def cmd_ns_find(args: argparse.Namespace, settings: Settings) -> int:
    """Print the pids that belong to a namespace."""
    pids = NamespaceInspector(settings).find_in_namespace(args.inode, args.kind, args.limit)
    for pid in pids:
        console.print(f"{pid}\t{report.process_name(pid)}")
    return 0 if pids else 1


def cmd_ns_stats(args: argparse.Namespace, settings: Settings) -> int:
    """Report system-wide namespace statistics."""
    stats = NamespaceInspector(settings).statistics(cap=args.cap)
    if args.json:
        _emit(report.statistics_to_dict(stats))
    else:
        console.print(report.render_namespace_statistics(stats))
    return 0


def cmd_ns_bench(args: argparse.Namespace, settings: Settings) -> int:
    """Time namespace creation for each requested kind."""
    inspector = NamespaceInspector(settings)
    timings = [inspector.measure_creation_time(args.kind) for _ in range(args.runs)]
    average = sum(timings) / len(timings)
    console.print(
        f"{args.kind.value}: avg {average:.1f}us min {min(timings):.1f}us"
        f" max {max(timings):.1f}us over {len(timings)} run(s)"
    )
    return 0


def cmd_run(args: argparse.Namespace, settings: Settings) -> int:
    """Run a command in a fresh, limited cgroup."""
    argv = args.argv[1:] if args.argv[:1] == ["--"] else args.argv
    if not argv:
        err_console.print("isoscope run: a command is required after --")
        return 2

    limits = ExecutionLimits(
        cpu_cores=args.cpu,
        memory_mb=args.memory,
        pids_max=args.pids,
        io=tuple(args.io),
    )
    timers: list[threading.Timer] = []

    def arm_timeout(child: ChildProcess) -> None:
        if args.timeout is None:
            return
        timer = threading.Timer(args.timeout, child.kill)
        timer.daemon = True
        timer.start()
        timers.append(timer)

    try:
        result = ConfinedExecutor(settings).run(argv, limits, name=args.name, on_spawn=arm_timeout)
    finally:
        for timer in timers:
            timer.cancel()

    if args.json:
        _emit(report.execution_result_to_dict(result))
    elif result.snapshot is not None:
        err_console.print(report.render_snapshot(result.snapshot))

    status = result.exit_status
    # shell convention for death by signal
    return 128 - status if status < 0 else status


def cmd_top(args: argparse.Namespace, settings: Settings) -> int:
    """Start the live view."""
    from isoscope.app import IsoscopeApp

    IsoscopeApp(args.pid, poll_rate=args.interval, settings=settings).run()
    return 0


COMMANDS = {
    "cgroup": cmd_cgroup,
    "cgroup-compare": cmd_cgroup_compare,
    "ns": cmd_ns,
    "ns-compare": cmd_ns_compare,
    "ns-isolated": cmd_ns_isolated,
    "ns-find": cmd_ns_find,
    "ns-stats": cmd_ns_stats,
    "ns-bench": cmd_ns_bench,
    "run": cmd_run,
    "top": cmd_top,
}


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the isoscope command."""
    args = build_parser().parse_args(argv)
    settings = Settings.from_env()
    configure_logging(args.verbose, settings)
    try:
        return COMMANDS[args.command](args, settings)
    except IsoscopeError as exc:
        err_console.print(f"[red]isoscope {args.command}: {escape(str(exc))}[/red]")
        return 1


if __name__ == "__main__":
    sys.exit(main())
