"""isoscope top - live cgroup and namespace view of one process."""

from queue import Empty, Queue

from rich.markup import escape
from textual.app import App, ComposeResult
from textual.containers import Container, Horizontal
from textual.css.query import NoMatches
from textual.widgets import DataTable, Footer, Static

from isoscope.config import Settings
from isoscope.models import UNLIMITED, CgroupMetricsSnapshot, ProcessNamespaceSet
from isoscope.monitor import CgroupMonitor, MonitorSample
from isoscope.report import format_bytes, format_limit, utilization_warnings


class HeaderStats(Static):
    """Header widget showing the process and its cgroup."""

    DEFAULT_CSS = """
    HeaderStats {
        height: auto;
        min-height: 5;
        padding: 1;
        background: $surface;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        """Initialize HeaderStats."""
        super().__init__(*args, **kwargs)
        self._sample: MonitorSample | None = None

    def compose(self) -> ComposeResult:
        """Compose the header stats layout."""
        yield Horizontal(
            Static(self._get_process_info(), id="process-info"),
            Static(self._get_rate_info(), id="rate-info"),
        )

    def update_sample(self, sample: MonitorSample) -> None:
        """Update the header from a monitor sample."""
        self._sample = sample
        self._refresh_display()

    def _refresh_display(self) -> None:
        """Refresh both header panels from the current sample."""
        try:
            self.query_one("#process-info", Static).update(self._get_process_info())
            self.query_one("#rate-info", Static).update(self._get_rate_info())
        except NoMatches:
            pass  # Widget not mounted yet

    def _get_process_info(self) -> str:
        """Build the process and cgroup identity text."""
        if self._sample is None:
            return "Loading process info..."
        proc = self._sample.process
        lines = []
        if proc is None:
            lines.append("Process: [red]gone or not accessible[/red]")
        else:
            lines.append(f"PID {proc.pid}  {escape(proc.name)}  ({escape(proc.username)}, {proc.status})")
            lines.append(f"Cmd: {escape(proc.command_line[:60])}")
        snapshot = self._sample.snapshot
        if snapshot is not None:
            lines.append(f"Cgroup v{snapshot.info.version.value}: {escape(str(snapshot.info.path))}")
        elif self._sample.error:
            lines.append(f"Cgroup: [red]{escape(self._sample.error)}[/red]")
        return "\n".join(lines)

    def _get_rate_info(self) -> str:
        """Build the rate bars and utilization warnings."""
        if self._sample is None or self._sample.rates is None:
            return "Waiting for a second sample..."
        rates = self._sample.rates
        bar_len = min(int(rates.cpu_cores * 20), 20)
        bar = "[green]█[/green]" * bar_len + "[dim]░[/dim]" * (20 - bar_len)
        lines = [
            f"CPU \\[{bar}] {rates.cpu_cores:5.2f} cores",
            f"Read  {format_bytes(rates.read_bps)}/s  Write {format_bytes(rates.write_bps)}/s",
            f"Mem growth {rates.memory_delta_bps / 1024:+.1f} KB/s",
        ]
        if self._sample.snapshot is not None:
            for warning in utilization_warnings(self._sample.snapshot):
                lines.append(f"[yellow]{warning}[/yellow]")
        return "\n".join(lines)


class MetricsTable(Container):
    """Per-controller usage against limits."""

    DEFAULT_CSS = """
    MetricsTable {
        height: 1fr;
        border: solid $primary;
    }
    """

    def compose(self) -> ComposeResult:
        """Compose the metrics table."""
        yield DataTable(id="metrics-table")

    def on_mount(self) -> None:
        table = self.query_one("#metrics-table", DataTable)
        table.cursor_type = "row"
        table.add_column("Resource", key="resource", width=12)
        table.add_column("Usage", key="usage", width=14)
        table.add_column("Limit", key="limit", width=14)
        table.add_column("Detail", key="detail")

    def update_snapshot(self, snapshot: CgroupMetricsSnapshot) -> None:
        """Replace the rows with the given snapshot."""
        table = self.query_one("#metrics-table", DataTable)
        table.clear()
        for row in self._rows(snapshot):
            table.add_row(*row, key=row[0])

    @staticmethod
    def _rows(snapshot: CgroupMetricsSnapshot) -> list[tuple[str, str, str, str]]:
        """One row per collected controller."""
        rows = []
        cpu = snapshot.cpu
        if cpu.collected:
            limit = f"{cpu.limit_cores:.2f} cores" if cpu.limit_cores is not None else "unlimited"
            rows.append((
                "cpu",
                f"{cpu.usage_usec / 1e6:.2f}s",
                limit,
                f"throttled {cpu.nr_throttled}/{cpu.nr_periods}",
            ))
        memory = snapshot.memory
        if memory.collected:
            rows.append((
                "memory",
                format_bytes(memory.current),
                format_limit(memory.limit),
                f"peak {format_bytes(memory.peak).strip()}, major faults {memory.pgmajfault}",
            ))
        blkio = snapshot.blkio
        if blkio.collected:
            rows.append((
                "io",
                f"R {format_bytes(blkio.rbytes).strip()}",
                "",
                f"W {format_bytes(blkio.wbytes).strip()}, {blkio.rios + blkio.wios} ops",
            ))
        pids = snapshot.pids
        if pids.collected:
            limit = "unlimited" if pids.limit == UNLIMITED else str(pids.limit)
            rows.append(("pids", str(pids.current), limit, ""))
        return rows


class NamespaceTable(Container):
    """Namespace memberships, flagged against pid 1."""

    DEFAULT_CSS = """
    NamespaceTable {
        height: 12;
        border: solid $secondary;
    }
    """

    def compose(self) -> ComposeResult:
        """Compose the namespace table."""
        yield DataTable(id="namespace-table")

    def on_mount(self) -> None:
        table = self.query_one("#namespace-table", DataTable)
        table.add_column("Type", key="kind", width=8)
        table.add_column("Inode", key="inode", width=14)

    def update_namespaces(self, ns_set: ProcessNamespaceSet) -> None:
        """Replace the rows with the given namespace set."""
        table = self.query_one("#namespace-table", DataTable)
        table.clear()
        for entry in ns_set.entries:
            inode = str(entry.inode) if entry.available else "N/A"
            table.add_row(entry.kind.value, inode, key=entry.kind.value)


class IsoscopeApp(App):
    """Live view of one process's cgroup usage and namespaces."""

    TITLE = "isoscope"
    SUB_TITLE = "cgroup & namespace monitor"

    CSS = """
    Screen {
        layout: vertical;
    }

    #header-stats {
        dock: top;
        height: auto;
        min-height: 6;
    }

    Horizontal {
        height: auto;
    }

    #process-info {
        width: 1fr;
        padding-right: 2;
    }

    #rate-info {
        width: 1fr;
        padding-left: 2;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("r", "refresh", "Refresh"),
    ]

    def __init__(self, pid: int, poll_rate: float = 1.0, settings: Settings | None = None) -> None:
        """Initialize the app and its monitor for ``pid``."""
        super().__init__()
        self._pid = pid
        self._update_queue: Queue[MonitorSample] = Queue()
        self._monitor = CgroupMonitor(self._update_queue, pid, poll_rate=poll_rate, settings=settings)
        self.sub_title = f"pid {pid}"

    def compose(self) -> ComposeResult:
        """Compose the app layout."""
        yield HeaderStats(id="header-stats")
        yield MetricsTable()
        yield NamespaceTable()
        yield Footer()

    def on_mount(self) -> None:
        """Start the monitor when the app is mounted."""
        self._monitor.start()
        self.set_interval(0.5, self._check_for_updates)

    def _check_for_updates(self) -> None:
        """Show the most recent queued sample, if any."""
        # drain the queue, keep the most recent sample
        sample = None
        while True:
            try:
                sample = self._update_queue.get_nowait()
            except Empty:
                break
        if sample is not None:
            self.update_ui(sample)

    def update_ui(self, sample: MonitorSample) -> None:
        """Push a sample into every widget."""
        self.query_one("#header-stats", HeaderStats).update_sample(sample)
        if sample.snapshot is not None:
            self.query_one(MetricsTable).update_snapshot(sample.snapshot)
        self.query_one(NamespaceTable).update_namespaces(sample.namespaces)

    def action_refresh(self) -> None:
        """Poll immediately instead of waiting for the next tick."""
        self._update_queue.put(self._monitor.collect_sample())
        self._check_for_updates()

    def action_quit(self) -> None:
        """Handle quit action with graceful cleanup."""
        self._monitor.stop()
        self.exit()
