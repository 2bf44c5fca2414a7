"""
Per-controller cgroup metric parsing.

File names differ between hierarchy versions, so they live in one layout
table keyed by (version, controller). The parse functions below are pure and
work on file content, which keeps them testable without a cgroupfs.
"""

import logging
import os
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from isoscope.cgroups import PathResolver, VersionDetector
from isoscope.config import Settings
from isoscope.errors import MalformedData, NotFound, PreconditionViolated
from isoscope.models import (
    UNLIMITED,
    BlockIoMetrics,
    CgroupHandle,
    CgroupInfo,
    CgroupMetricsSnapshot,
    CgroupRates,
    CgroupVersion,
    Controller,
    CpuMetrics,
    MemoryMetrics,
    PidsMetrics,
)

logger = logging.getLogger(__name__)

# v1 reports "no limit" as LONG_MAX rounded down to the page size
_V1_UNLIMITED_FLOOR = 2**63 - 2**16

_NSEC_PER_USEC = 1000
_USEC_PER_SEC = 1_000_000

_IO_STAT_KEYS = ("rbytes", "wbytes", "rios", "wios", "dbytes", "dios")

_MEMORY_STAT_KEYS_V2 = {
    "cache": "cache",
    "rss": "rss",
    "rss_huge": "rss_huge",
    "anon_thp": "rss_huge",
    "mapped_file": "mapped_file",
    "file_mapped": "mapped_file",
    "dirty": "dirty",
    "file_dirty": "dirty",
    "writeback": "writeback",
    "file_writeback": "writeback",
    "pgfault": "pgfault",
    "pgmajfault": "pgmajfault",
    "anon": "anon",
    "file": "file",
}

_MEMORY_STAT_KEYS_V1 = {
    key: key for key in ("cache", "rss", "rss_huge", "mapped_file", "pgfault", "pgmajfault")
}


@dataclass(slots=True, frozen=True)
class FileLayout:
    """Where one controller keeps its numbers for one hierarchy version."""

    primary: str
    files: Mapping[str, str] = field(default_factory=dict)

    def __getitem__(self, role: str) -> str:
        return self.files[role]


LAYOUTS: dict[tuple[CgroupVersion, Controller], FileLayout] = {
    (CgroupVersion.V2, Controller.CPU): FileLayout("cpu.stat", {"max": "cpu.max"}),
    (CgroupVersion.V1, Controller.CPU): FileLayout(
        "cpuacct.usage",
        {
            "stat": "cpu.stat",
            "acct_stat": "cpuacct.stat",
            "quota": "cpu.cfs_quota_us",
            "period": "cpu.cfs_period_us",
        },
    ),
    (CgroupVersion.V2, Controller.MEMORY): FileLayout(
        "memory.current",
        {
            "peak": "memory.peak",
            "limit": "memory.max",
            "swap_current": "memory.swap.current",
            "swap_limit": "memory.swap.max",
            "stat": "memory.stat",
        },
    ),
    (CgroupVersion.V1, Controller.MEMORY): FileLayout(
        "memory.usage_in_bytes",
        {
            "peak": "memory.max_usage_in_bytes",
            "limit": "memory.limit_in_bytes",
            "swap_current": "memory.memsw.usage_in_bytes",
            "swap_limit": "memory.memsw.limit_in_bytes",
            "stat": "memory.stat",
        },
    ),
    (CgroupVersion.V2, Controller.BLKIO): FileLayout("io.stat"),
    (CgroupVersion.V1, Controller.BLKIO): FileLayout(
        "blkio.throttle.io_service_bytes",
        {"serviced": "blkio.throttle.io_serviced"},
    ),
    (CgroupVersion.V2, Controller.PIDS): FileLayout("pids.current", {"max": "pids.max"}),
    (CgroupVersion.V1, Controller.PIDS): FileLayout("pids.current", {"max": "pids.max"}),
}


def _is_unsigned(value: str) -> bool:
    # str.isdigit() also accepts superscripts and other digits int() refuses
    return value.isascii() and value.isdigit()


def parse_scalar(text: str) -> int:
    """Parse a single unsigned integer file."""
    value = text.strip()
    if not _is_unsigned(value):
        raise MalformedData(f"expected an unsigned integer, got {value!r}")
    return int(value)


def parse_signed(text: str) -> int:
    """Parse a single signed integer."""
    value = text.strip()
    try:
        return int(value)
    except ValueError:
        raise MalformedData(f"expected an integer, got {value!r}") from None


def parse_limit(text: str) -> int:
    """Parse a limit file; "max" and the v1 LONG_MAX marker become UNLIMITED."""
    if text.strip() == "max":
        return UNLIMITED
    value = parse_scalar(text)
    return UNLIMITED if value >= _V1_UNLIMITED_FLOOR else value


def parse_flat_keyed(text: str) -> dict[str, int]:
    """Parse "key value" lines; lines that don't fit the shape are skipped."""
    result: dict[str, int] = {}
    for line in text.splitlines():
        parts = line.split()
        if len(parts) != 2:
            continue
        try:
            result[parts[0]] = int(parts[1])
        except ValueError:
            continue
    return result


def parse_cpu_max(text: str) -> tuple[int, int]:
    """Parse v2 ``cpu.max`` ("quota period"); a "max" quota becomes -1."""
    parts = text.split()
    if len(parts) != 2:
        raise MalformedData(f"expected 'quota period', got {text.strip()!r}")
    quota_text, period_text = parts
    quota = -1 if quota_text == "max" else parse_signed(quota_text)
    return quota, parse_scalar(period_text)


def parse_io_stat(text: str) -> dict[str, int]:
    """
    Sum v2 ``io.stat`` counters across devices.

    Each line is "MAJ:MIN key=value ..."; keys absent from a line count as
    zero and tokens that aren't key=value pairs are ignored.
    """
    totals = dict.fromkeys(_IO_STAT_KEYS, 0)
    for line in text.splitlines():
        tokens = line.split()
        if not tokens or ":" not in tokens[0]:
            continue
        for token in tokens[1:]:
            key, sep, value = token.partition("=")
            if not sep or key not in totals or not _is_unsigned(value):
                continue
            totals[key] += int(value)
    return totals


def parse_blkio_throttle(text: str) -> dict[str, int]:
    """Sum v1 "MAJ:MIN Op value" lines by operation, skipping the Total line."""
    totals: dict[str, int] = {}
    for line in text.splitlines():
        parts = line.split()
        if len(parts) != 3 or ":" not in parts[0] or not _is_unsigned(parts[2]):
            continue
        totals[parts[1]] = totals.get(parts[1], 0) + int(parts[2])
    return totals


def _clock_ticks_per_second() -> int:
    return os.sysconf("SC_CLK_TCK")


class MetricReader:
    """Reads typed metric records from cgroup directories."""

    def __init__(
        self,
        settings: Settings | None = None,
        detector: VersionDetector | None = None,
        resolver: PathResolver | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings or Settings()
        self._detector = detector or VersionDetector(self._settings)
        self._resolver = resolver or PathResolver(self._settings, self._detector)
        self._clock = clock

    # -- file access -------------------------------------------------------

    @staticmethod
    def _read(path: Path) -> str | None:
        """Read a metric file; None when it is absent or unreadable."""
        try:
            return path.read_text()
        except FileNotFoundError:
            return None
        except PermissionError:
            logger.warning("permission denied reading %s; field not collected", path)
            return None
        except OSError as exc:
            logger.debug("cannot read %s: %s", path, exc)
            return None

    def _read_parsed(self, path: Path, parse: Callable[[str], int], default: int) -> int:
        """Read an optional file, falling back to ``default``."""
        text = self._read(path)
        if text is None:
            return default
        try:
            return parse(text)
        except MalformedData as exc:
            logger.debug("%s: %s", path, exc)
            return default

    @staticmethod
    def _require_dir(path: Path) -> None:
        if not path.is_dir():
            raise NotFound(f"cgroup directory {path} does not exist")

    def _layout(self, controller: Controller) -> tuple[CgroupVersion, FileLayout]:
        """Detect the version and look up the file layout for ``controller``."""
        version = self._detector.require_version()
        return version, LAYOUTS[(version, controller)]

    def _read_primary(self, path: Path, parse: Callable[[str], object]):
        """Parse a record's primary file; None means "not collected"."""
        text = self._read(path)
        if text is None:
            return None
        try:
            return parse(text)
        except MalformedData as exc:
            logger.debug("%s: %s", path, exc)
            return None

    # -- per-controller readers -------------------------------------------

    def read_cpu_metrics(self, path: Path) -> CpuMetrics:
        """Read CPU usage, throttling and quota from the cgroup at ``path``."""
        self._require_dir(path)
        version, layout = self._layout(Controller.CPU)

        if version is CgroupVersion.V2:
            stat = self._read_primary(path / layout.primary, parse_flat_keyed)
            if stat is None:
                return CpuMetrics()
            quota, period = -1, 0
            text = self._read(path / layout["max"])
            if text is not None:
                try:
                    quota, period = parse_cpu_max(text)
                except MalformedData as exc:
                    logger.debug("%s: %s", path / layout["max"], exc)
            return CpuMetrics(
                usage_usec=stat.get("usage_usec", 0),
                user_usec=stat.get("user_usec", 0),
                system_usec=stat.get("system_usec", 0),
                nr_periods=stat.get("nr_periods", 0),
                nr_throttled=stat.get("nr_throttled", 0),
                throttled_usec=stat.get("throttled_usec", 0),
                quota=quota,
                period=period,
                collected=True,
            )

        usage_ns = self._read_primary(path / layout.primary, parse_scalar)
        if usage_ns is None:
            return CpuMetrics()
        stat = parse_flat_keyed(self._read(path / layout["stat"]) or "")
        ticks = parse_flat_keyed(self._read(path / layout["acct_stat"]) or "")
        usec_per_tick = _USEC_PER_SEC // _clock_ticks_per_second()
        return CpuMetrics(
            usage_usec=usage_ns // _NSEC_PER_USEC,
            user_usec=ticks.get("user", 0) * usec_per_tick,
            system_usec=ticks.get("system", 0) * usec_per_tick,
            nr_periods=stat.get("nr_periods", 0),
            nr_throttled=stat.get("nr_throttled", 0),
            throttled_usec=stat.get("throttled_time", 0) // _NSEC_PER_USEC,
            quota=self._read_parsed(path / layout["quota"], parse_signed, -1),
            period=self._read_parsed(path / layout["period"], parse_scalar, 0),
            collected=True,
        )

    def read_memory_metrics(self, path: Path) -> MemoryMetrics:
        """Read memory usage, limits and the memory.stat breakdown."""
        self._require_dir(path)
        version, layout = self._layout(Controller.MEMORY)

        current = self._read_primary(path / layout.primary, parse_scalar)
        if current is None:
            return MemoryMetrics()

        keys = _MEMORY_STAT_KEYS_V2 if version is CgroupVersion.V2 else _MEMORY_STAT_KEYS_V1
        stat = parse_flat_keyed(self._read(path / layout["stat"]) or "")
        breakdown: dict[str, int] = {}
        for key, value in stat.items():
            name = keys.get(key)
            if name is not None:
                breakdown[name] = value

        return MemoryMetrics(
            current=current,
            peak=self._read_parsed(path / layout["peak"], parse_scalar, 0),
            limit=self._read_parsed(path / layout["limit"], parse_limit, UNLIMITED),
            swap_current=self._read_parsed(path / layout["swap_current"], parse_scalar, 0),
            swap_limit=self._read_parsed(path / layout["swap_limit"], parse_limit, UNLIMITED),
            collected=True,
            **breakdown,
        )

    def read_blkio_metrics(self, path: Path) -> BlockIoMetrics:
        """Read block I/O byte and operation totals, summed across devices."""
        self._require_dir(path)
        version, layout = self._layout(Controller.BLKIO)

        if version is CgroupVersion.V2:
            totals = self._read_primary(path / layout.primary, parse_io_stat)
            if totals is None:
                return BlockIoMetrics()
            return BlockIoMetrics(**totals, collected=True)

        service_bytes = self._read_primary(path / layout.primary, parse_blkio_throttle)
        if service_bytes is None:
            return BlockIoMetrics()
        serviced = parse_blkio_throttle(self._read(path / layout["serviced"]) or "")
        return BlockIoMetrics(
            rbytes=service_bytes.get("Read", 0),
            wbytes=service_bytes.get("Write", 0),
            dbytes=service_bytes.get("Discard", 0),
            rios=serviced.get("Read", 0),
            wios=serviced.get("Write", 0),
            dios=serviced.get("Discard", 0),
            collected=True,
        )

    def read_pids_metrics(self, path: Path) -> PidsMetrics:
        """Read the task count and limit; identical on both versions."""
        self._require_dir(path)
        layout = LAYOUTS[(CgroupVersion.V2, Controller.PIDS)]
        current = self._read_primary(path / layout.primary, parse_scalar)
        if current is None:
            return PidsMetrics()
        # any non-numeric pids.max (normally "max") means unlimited
        limit = self._read_parsed(path / layout["max"], parse_limit, UNLIMITED)
        return PidsMetrics(current=current, limit=limit, collected=True)

    # -- snapshots ---------------------------------------------------------

    def snapshot_for_pid(self, pid: int) -> CgroupMetricsSnapshot:
        """
        Read every controller of the cgroup(s) governing ``pid``.

        Raises:
            UnsupportedVersion: No cgroup hierarchy is mounted.
            NotFound: The pid's cgroup cannot be resolved at all.
        """
        version = self._detector.require_version()
        if version is CgroupVersion.V2:
            handles = [self._resolver.resolve(pid)]
        else:
            handles = []
            for controller in (Controller.CPU, Controller.MEMORY, Controller.BLKIO, Controller.PIDS):
                try:
                    handles.append(self._resolver.resolve(pid, controller))
                except NotFound:
                    logger.debug("pid %d has no %s hierarchy", pid, controller.value)
            if not handles:
                raise NotFound(f"pid {pid} is not attached to any known v1 hierarchy")
        return self.snapshot_for_handles(handles, pid=pid)

    def snapshot_for_handles(
        self, handles: Sequence[CgroupHandle], pid: int | None = None
    ) -> CgroupMetricsSnapshot:
        """Read every controller from already-resolved cgroup handles."""
        if not handles:
            raise PreconditionViolated("at least one cgroup handle is required")
        base = handles[0]

        def path_for(controller: Controller) -> Path | None:
            if base.version is not CgroupVersion.V1:
                return base.path
            for handle in handles:
                if controller in handle.controllers_present:
                    return handle.path
            return None

        readers = {
            Controller.CPU: (self.read_cpu_metrics, CpuMetrics),
            Controller.MEMORY: (self.read_memory_metrics, MemoryMetrics),
            Controller.BLKIO: (self.read_blkio_metrics, BlockIoMetrics),
            Controller.PIDS: (self.read_pids_metrics, PidsMetrics),
        }
        records = {}
        for controller, (read, empty) in readers.items():
            path = path_for(controller)
            if path is None:
                records[controller] = empty()
                continue
            try:
                records[controller] = read(path)
            except NotFound:
                if path == base.path:
                    raise
                logger.debug("%s hierarchy path %s vanished", controller.value, path)
                records[controller] = empty()

        present = frozenset().union(*(handle.controllers_present for handle in handles))
        info = CgroupInfo(
            path=base.path,
            name=base.name or "/",
            version=base.version,
            pid=pid,
            controllers_present=present,
        )
        return CgroupMetricsSnapshot(
            info=info,
            cpu=records[Controller.CPU],
            memory=records[Controller.MEMORY],
            blkio=records[Controller.BLKIO],
            pids=records[Controller.PIDS],
            taken_at=self._clock(),
        )


def compute_rates(previous: CgroupMetricsSnapshot, current: CgroupMetricsSnapshot) -> CgroupRates:
    """
    Per-second rates between two snapshots of the same cgroup.

    Pure function: the caller keeps the previous snapshot. Counters that went
    backwards (cgroup recreated) yield zero instead of a negative rate.
    """
    elapsed = current.taken_at - previous.taken_at
    if elapsed <= 0:
        raise PreconditionViolated("snapshots must be in chronological order")

    def counter_rate(before: int, after: int) -> float:
        return max(after - before, 0) / elapsed

    cpu_cores = 0.0
    if previous.cpu.collected and current.cpu.collected:
        cpu_cores = counter_rate(previous.cpu.usage_usec, current.cpu.usage_usec) / _USEC_PER_SEC

    read_bps = write_bps = 0.0
    if previous.blkio.collected and current.blkio.collected:
        read_bps = counter_rate(previous.blkio.rbytes, current.blkio.rbytes)
        write_bps = counter_rate(previous.blkio.wbytes, current.blkio.wbytes)

    memory_delta = 0.0
    if previous.memory.collected and current.memory.collected:
        memory_delta = (current.memory.current - previous.memory.current) / elapsed

    return CgroupRates(
        elapsed=elapsed,
        cpu_cores=cpu_cores,
        read_bps=read_bps,
        write_bps=write_bps,
        memory_delta_bps=memory_delta,
    )
