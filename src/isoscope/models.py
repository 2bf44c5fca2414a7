"""Data models for isoscope."""

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

# Reserved "no limit" value for unsigned counters and limits
UNLIMITED = 2**64 - 1


class CgroupVersion(Enum):
    """Cgroup hierarchy version present on the host."""

    UNKNOWN = 0
    V1 = 1
    V2 = 2


class Controller(Enum):
    """Resource controllers understood by isoscope."""

    CPU = "cpu"
    MEMORY = "memory"
    BLKIO = "blkio"
    PIDS = "pids"
    CPUSET = "cpuset"
    IO = "io"

    @classmethod
    def from_name(cls, name: str) -> "Controller | None":
        """Return the controller called ``name``, or None if unknown."""
        try:
            return cls(name)
        except ValueError:
            return None


@dataclass(slots=True, frozen=True)
class CgroupHandle:
    """A cgroup directory resolved or created by isoscope."""

    path: Path
    version: CgroupVersion
    controllers_present: frozenset[Controller] = frozenset()

    @property
    def name(self) -> str:
        return self.path.name


@dataclass(slots=True, frozen=True)
class CpuMetrics:
    """CPU accounting for one cgroup. Times are in microseconds."""

    usage_usec: int = 0
    user_usec: int = 0
    system_usec: int = 0
    nr_periods: int = 0
    nr_throttled: int = 0
    throttled_usec: int = 0
    quota: int = -1  # -1 = unlimited
    period: int = 0
    collected: bool = False

    @property
    def limit_cores(self) -> float | None:
        """Configured limit in cores, or None when unlimited."""
        if self.quota <= 0 or self.period == 0:
            return None
        return self.quota / self.period

    @property
    def throttled_ratio(self) -> float | None:
        """Fraction of periods that were throttled, or None before the first period."""
        if self.nr_periods == 0:
            return None
        return self.nr_throttled / self.nr_periods


@dataclass(slots=True, frozen=True)
class MemoryMetrics:
    """Memory accounting for one cgroup. Sizes are in bytes."""

    current: int = 0
    peak: int = 0
    limit: int = UNLIMITED
    swap_current: int = 0
    swap_limit: int = UNLIMITED
    cache: int = 0
    rss: int = 0
    rss_huge: int = 0
    mapped_file: int = 0
    dirty: int = 0
    writeback: int = 0
    pgfault: int = 0
    pgmajfault: int = 0
    anon: int = 0
    file: int = 0
    collected: bool = False

    @property
    def usage_ratio(self) -> float | None:
        if self.limit in (0, UNLIMITED):
            return None
        return self.current / self.limit


@dataclass(slots=True, frozen=True)
class BlockIoMetrics:
    """Block I/O totals for one cgroup, summed across devices."""

    rbytes: int = 0
    wbytes: int = 0
    rios: int = 0
    wios: int = 0
    dbytes: int = 0
    dios: int = 0
    collected: bool = False


@dataclass(slots=True, frozen=True)
class PidsMetrics:
    """Task count and limit for one cgroup."""

    current: int = 0
    limit: int = UNLIMITED
    collected: bool = False

    @property
    def usage_ratio(self) -> float | None:
        if self.limit in (0, UNLIMITED):
            return None
        return self.current / self.limit


@dataclass(slots=True, frozen=True)
class CgroupInfo:
    """Identity of the cgroup a snapshot was read from."""

    path: Path
    name: str
    version: CgroupVersion
    pid: int | None = None
    controllers_present: frozenset[Controller] = frozenset()


@dataclass(slots=True, frozen=True)
class CgroupMetricsSnapshot:
    """Immutable point-in-time read of every controller of a cgroup."""

    info: CgroupInfo
    cpu: CpuMetrics
    memory: MemoryMetrics
    blkio: BlockIoMetrics
    pids: PidsMetrics
    taken_at: float  # time.monotonic() seconds

    def controllers_collected(self) -> list[Controller]:
        """Controllers whose record was successfully collected."""
        records = (
            (Controller.CPU, self.cpu),
            (Controller.MEMORY, self.memory),
            (Controller.BLKIO, self.blkio),
            (Controller.PIDS, self.pids),
        )
        return [controller for controller, record in records if record.collected]


@dataclass(slots=True, frozen=True)
class CgroupRates:
    """Per-second rates derived from two snapshots of the same cgroup."""

    elapsed: float
    cpu_cores: float
    read_bps: float
    write_bps: float
    memory_delta_bps: float


class NamespaceKind(Enum):
    """The eight Linux namespace types, in ordinal order."""

    CGROUP = "cgroup"
    IPC = "ipc"
    MNT = "mnt"
    NET = "net"
    PID = "pid"
    TIME = "time"
    USER = "user"
    UTS = "uts"

    @property
    def index(self) -> int:
        return _KIND_ORDER.index(self)


_KIND_ORDER = tuple(NamespaceKind)


@dataclass(slots=True, frozen=True)
class NamespaceIdentity:
    """One namespace membership of a process."""

    kind: NamespaceKind
    inode: int = 0  # only meaningful when available
    available: bool = False


@dataclass(slots=True, frozen=True)
class ProcessNamespaceSet:
    """All eight namespace memberships of a process, indexed by kind."""

    pid: int
    entries: tuple[NamespaceIdentity, ...]

    def __post_init__(self) -> None:
        """Check all eight kinds are present in order."""
        kinds = tuple(entry.kind for entry in self.entries)
        if kinds != _KIND_ORDER:
            raise ValueError("entries must hold exactly one identity per kind, in kind order")

    def __getitem__(self, kind: NamespaceKind) -> NamespaceIdentity:
        """Return the membership for ``kind``."""
        return self.entries[kind.index]

    @property
    def available_count(self) -> int:
        return sum(1 for entry in self.entries if entry.available)


@dataclass(slots=True, frozen=True)
class NamespaceComparison:
    """Shared/isolated verdict for one kind available on both processes."""

    kind: NamespaceKind
    shared: bool
    inode_a: int
    inode_b: int


@dataclass(slots=True, frozen=True)
class NamespaceStatistics:
    """System-wide namespace uniqueness at scan time."""

    total_processes_analyzed: int
    unique_counts: Mapping[NamespaceKind, int]
    cap: int
    saturated: frozenset[NamespaceKind] = field(default_factory=frozenset)
