"""Runtime settings for isoscope."""

import os
from dataclasses import dataclass
from pathlib import Path

DEFAULT_CGROUP_ROOT = Path("/sys/fs/cgroup")
DEFAULT_PROC_ROOT = Path("/proc")


@dataclass(slots=True, frozen=True)
class Settings:
    """
    Filesystem roots and tunables shared by every component.

    The roots are configurable so the whole stack can run against a fake
    cgroupfs/procfs tree.
    """

    cgroup_root: Path = DEFAULT_CGROUP_ROOT
    proc_root: Path = DEFAULT_PROC_ROOT
    cpu_period_us: int = 100_000  # 100ms CFS period
    namespace_cap: int = 1024  # distinct inodes recorded per kind in a scan
    cgroup_prefix: str = "isoscope"
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from ``ISOSCOPE_*`` environment variables."""
        return cls(
            cgroup_root=Path(os.environ.get("ISOSCOPE_CGROUP_ROOT", DEFAULT_CGROUP_ROOT)),
            proc_root=Path(os.environ.get("ISOSCOPE_PROC_ROOT", DEFAULT_PROC_ROOT)),
            log_level=os.environ.get("ISOSCOPE_LOG_LEVEL", "WARNING").upper(),
        )
