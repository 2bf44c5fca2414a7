"""Creating, limiting and removing cgroups."""

import logging
import os
import re
from collections.abc import Iterable
from pathlib import Path

from isoscope.cgroups import VersionDetector, parse_controller_list, v1_hierarchy_dir
from isoscope.config import Settings
from isoscope.errors import PreconditionViolated, UnsupportedVersion, translate_os_error
from isoscope.models import CgroupHandle, CgroupVersion, Controller

logger = logging.getLogger(__name__)

_DEVICE_RE = re.compile(r"^\d+:\d+$")


class LimitController:
    """
    Writes cgroupfs control files.

    Every write is open-write-close with no read-back: the kernel validates
    the value, and a rejected value surfaces as an exception from the write.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        detector: VersionDetector | None = None,
    ) -> None:
        self._settings = settings or Settings()
        self._detector = detector or VersionDetector(self._settings)

    @property
    def cpu_period_us(self) -> int:
        return self._settings.cpu_period_us

    def _write(self, path: Path, value: str) -> None:
        """Write one control file, translating OS errors."""
        logger.debug("write %r -> %s", value, path)
        try:
            # cgroupfs control files are written, never read back
            with open(path, "w") as f:
                f.write(value)
        except OSError as exc:
            raise translate_os_error(exc, path) from exc

    def create(self, name: str, controller: Controller) -> CgroupHandle:
        """
        Create (or reuse) the cgroup ``name``.

        On v2 the controller only tags the handle; on v1 it selects the
        hierarchy the directory is created in.
        """
        if not name or "/" in name or name in (".", ".."):
            raise PreconditionViolated(f"invalid cgroup name {name!r}")
        version = self._detector.require_version()
        root = self._settings.cgroup_root

        if version is CgroupVersion.V2:
            path = root / name
        else:
            path = root / v1_hierarchy_dir(controller) / name

        try:
            path.mkdir(mode=0o755)
            logger.info("created cgroup %s", path)
        except FileExistsError:
            logger.debug("cgroup %s already exists", path)
        except OSError as exc:
            raise translate_os_error(exc, path) from exc

        if version is CgroupVersion.V2:
            try:
                present = parse_controller_list((path / "cgroup.controllers").read_text())
            except OSError:
                present = frozenset({controller})
        else:
            present = frozenset({controller})
        return CgroupHandle(path, version, present)

    def remove(self, handle: CgroupHandle) -> None:
        """Remove an empty cgroup; ResourceBusy if members remain."""
        try:
            os.rmdir(handle.path)
        except OSError as exc:
            raise translate_os_error(exc, handle.path) from exc
        logger.info("removed cgroup %s", handle.path)

    def move_process(self, pid: int, handle: CgroupHandle) -> None:
        """Attach ``pid`` to the cgroup by writing it to cgroup.procs."""
        self._write(handle.path / "cgroup.procs", str(pid))

    def set_cpu_limit(self, handle: CgroupHandle, cores: float) -> None:
        """Cap the cgroup at ``cores`` CPUs worth of CFS bandwidth."""
        if cores <= 0:
            raise PreconditionViolated(f"cpu cores must be positive, got {cores}")
        period = self.cpu_period_us
        quota = int(cores * period)

        if handle.version is CgroupVersion.V2:
            self._write(handle.path / "cpu.max", f"{quota} {period}")
        elif handle.version is CgroupVersion.V1:
            # period first: the kernel checks the quota against it
            self._write(handle.path / "cpu.cfs_period_us", str(period))
            self._write(handle.path / "cpu.cfs_quota_us", str(quota))
        else:
            raise UnsupportedVersion(f"cannot limit cpu of {handle.path}")

    def set_memory_limit(self, handle: CgroupHandle, limit_bytes: int) -> None:
        """Set the hard memory limit. Zero is rejected (it reads as "no limit")."""
        if limit_bytes <= 0:
            raise PreconditionViolated(f"memory limit must be positive, got {limit_bytes}")
        if handle.version is CgroupVersion.V2:
            self._write(handle.path / "memory.max", str(limit_bytes))
        elif handle.version is CgroupVersion.V1:
            self._write(handle.path / "memory.limit_in_bytes", str(limit_bytes))
        else:
            raise UnsupportedVersion(f"cannot limit memory of {handle.path}")

    def set_io_limit(self, handle: CgroupHandle, device: str, read_bps: int, write_bps: int) -> None:
        """Throttle reads and writes on block device ``MAJOR:MINOR``."""
        if not _DEVICE_RE.match(device):
            raise PreconditionViolated(f"device must be MAJOR:MINOR, got {device!r}")
        if read_bps < 0 or write_bps < 0:
            raise PreconditionViolated("io rates must not be negative")

        if handle.version is CgroupVersion.V2:
            self._write(handle.path / "io.max", f"{device} rbps={read_bps} wbps={write_bps}")
        elif handle.version is CgroupVersion.V1:
            self._write(handle.path / "blkio.throttle.read_bps_device", f"{device} {read_bps}")
            self._write(handle.path / "blkio.throttle.write_bps_device", f"{device} {write_bps}")
        else:
            raise UnsupportedVersion(f"cannot limit io of {handle.path}")

    def set_pids_limit(self, handle: CgroupHandle, max_pids: int) -> None:
        """Cap the number of tasks in the cgroup."""
        if max_pids <= 0:
            raise PreconditionViolated(f"pids limit must be positive, got {max_pids}")
        self._write(handle.path / "pids.max", str(max_pids))

    def enable_controllers(self, controllers: Iterable[Controller]) -> None:
        """Delegate controllers to child cgroups of the v2 root (no-op on v1)."""
        if self._detector.require_version() is not CgroupVersion.V2:
            return
        names = " ".join(f"+{controller.value}" for controller in controllers)
        if names:
            self._write(self._settings.cgroup_root / "cgroup.subtree_control", names)
