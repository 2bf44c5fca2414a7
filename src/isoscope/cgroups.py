"""Cgroup hierarchy detection and per-process path resolution."""

import logging
from pathlib import Path

from isoscope.config import Settings
from isoscope.errors import NotFound, UnsupportedVersion
from isoscope.models import CgroupHandle, CgroupVersion, Controller

logger = logging.getLogger(__name__)

# v1 has no "io" hierarchy; the blkio tree carries block I/O there
_V1_HIERARCHY_DIRS = {
    Controller.CPU: "cpu",
    Controller.MEMORY: "memory",
    Controller.BLKIO: "blkio",
    Controller.PIDS: "pids",
    Controller.CPUSET: "cpuset",
    Controller.IO: "blkio",
}


def v1_hierarchy_dir(controller: Controller) -> str:
    """Directory name of ``controller``'s hierarchy under a v1 mount."""
    return _V1_HIERARCHY_DIRS[controller]


def parse_controller_list(text: str, separator: str | None = None) -> frozenset[Controller]:
    """Turn "cpu,cpuacct" or "cpu memory pids" into known controllers."""
    names = text.split(separator) if separator else text.split()
    found = (Controller.from_name(name.strip()) for name in names)
    return frozenset(controller for controller in found if controller is not None)


class VersionDetector:
    """
    Probes the cgroup mount for the hierarchy version.

    Nothing is cached: every call re-reads the filesystem, so a detector can
    be pointed at different mount layouts within one process.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or Settings()

    @property
    def root(self) -> Path:
        return self._settings.cgroup_root

    def detect_version(self) -> CgroupVersion:
        """Return V2, V1, or UNKNOWN when no cgroup support is mounted."""
        if (self.root / "cgroup.controllers").exists():
            return CgroupVersion.V2
        if (self.root / "cpu").exists():
            return CgroupVersion.V1
        return CgroupVersion.UNKNOWN

    def require_version(self) -> CgroupVersion:
        """Like detect_version(), but UNKNOWN raises UnsupportedVersion."""
        version = self.detect_version()
        if version is CgroupVersion.UNKNOWN:
            raise UnsupportedVersion(f"no cgroup hierarchy found under {self.root}")
        return version


class PathResolver:
    """Maps a pid (and a controller, on v1) to its cgroupfs directory."""

    def __init__(
        self,
        settings: Settings | None = None,
        detector: VersionDetector | None = None,
    ) -> None:
        self._settings = settings or Settings()
        self._detector = detector or VersionDetector(self._settings)

    def _read_membership(self, pid: int) -> list[tuple[int, str, str]]:
        """Parse ``/proc/<pid>/cgroup`` into (hierarchy, controllers, path) tuples."""
        record = self._settings.proc_root / str(pid) / "cgroup"
        try:
            content = record.read_text()
        except OSError as exc:
            raise NotFound(f"cannot read cgroup membership of pid {pid}: {exc}") from exc

        entries = []
        for line in content.splitlines():
            parts = line.split(":", 2)
            if len(parts) != 3:
                continue
            try:
                hierarchy = int(parts[0])
            except ValueError:
                continue
            entries.append((hierarchy, parts[1], parts[2]))
        return entries

    @staticmethod
    def _join(base: Path, relative: str) -> Path:
        # "" and "/" both mean the root cgroup, i.e. the mount point itself
        relative = relative.strip("/")
        return base / relative if relative else base

    def resolve(self, pid: int, controller: Controller | None = None) -> CgroupHandle:
        """
        Resolve the cgroup governing ``pid``.

        Args:
            pid: Process to look up.
            controller: v1 hierarchy selector; ignored on v2. Without it the
                hierarchy-0 entry is used.

        Raises:
            UnsupportedVersion: No cgroup hierarchy is mounted.
            NotFound: The membership record is unreadable or nothing matches.
        """
        version = self._detector.require_version()
        root = self._settings.cgroup_root
        entries = self._read_membership(pid)

        if version is CgroupVersion.V2 or controller is None:
            for hierarchy, _, relative in entries:
                if hierarchy == 0:
                    path = self._join(root, relative)
                    return CgroupHandle(path, version, self._read_enabled(path))
            raise NotFound(f"pid {pid} has no unified (hierarchy 0) cgroup entry")

        hierarchy_dir = v1_hierarchy_dir(controller)
        for _, controllers, relative in entries:
            names = controllers.split(",")
            if hierarchy_dir in names:
                path = self._join(root / hierarchy_dir, relative)
                return CgroupHandle(path, version, parse_controller_list(controllers, ","))
        raise NotFound(f"pid {pid} is not attached to a {controller.value} hierarchy")

    @staticmethod
    def _read_enabled(path: Path) -> frozenset[Controller]:
        """Controllers listed in a v2 ``cgroup.controllers`` file."""
        try:
            return parse_controller_list((path / "cgroup.controllers").read_text())
        except OSError:
            logger.debug("no cgroup.controllers under %s", path)
            return frozenset()
