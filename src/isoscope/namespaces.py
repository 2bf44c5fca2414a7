"""Namespace identity, comparison and system-wide statistics."""

import logging
import os
import time
from collections.abc import Iterator

from isoscope.config import Settings
from isoscope.errors import NotFound, PermissionDenied, PreconditionViolated
from isoscope.models import (
    NamespaceComparison,
    NamespaceIdentity,
    NamespaceKind,
    NamespaceStatistics,
    ProcessNamespaceSet,
)

logger = logging.getLogger(__name__)

INIT_PID = 1


def _unshare_flags() -> dict[NamespaceKind, int]:
    """CLONE_NEW* flags known to this interpreter, by kind."""
    # the time namespace can't be entered by unshare() in the calling process
    return {
        NamespaceKind.CGROUP: os.CLONE_NEWCGROUP,
        NamespaceKind.IPC: os.CLONE_NEWIPC,
        NamespaceKind.MNT: os.CLONE_NEWNS,
        NamespaceKind.NET: os.CLONE_NEWNET,
        NamespaceKind.PID: os.CLONE_NEWPID,
        NamespaceKind.USER: os.CLONE_NEWUSER,
        NamespaceKind.UTS: os.CLONE_NEWUTS,
    }


class NamespaceInspector:
    """
    Reads namespace memberships from ``/proc/<pid>/ns``.

    A namespace is identified by the inode its ``ns/<kind>`` link resolves
    to; two processes share a namespace exactly when those inodes match.
    Process-table scans take no locks: a pid that exits mid-scan is skipped,
    and one that appears mid-scan may or may not be seen.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or Settings()

    def _ns_inode(self, pid: int, kind: NamespaceKind) -> int | None:
        """Inode of ``/proc/<pid>/ns/<kind>``, or None if unreadable."""
        path = self._settings.proc_root / str(pid) / "ns" / kind.value
        try:
            return os.stat(path).st_ino
        except OSError:
            return None

    def _iter_pids(self) -> Iterator[int]:
        """Yield pids from the process table in kernel directory order."""
        with os.scandir(self._settings.proc_root) as entries:
            for entry in entries:
                if not (entry.name.isascii() and entry.name.isdigit()):
                    continue
                try:
                    if not entry.is_dir():
                        continue
                except OSError:
                    continue  # vanished
                pid = int(entry.name)
                if pid > 0:
                    yield pid

    def list_namespaces(self, pid: int) -> ProcessNamespaceSet:
        """Return all eight memberships of ``pid``; unreadable kinds are unavailable."""
        entries = []
        for kind in NamespaceKind:
            inode = self._ns_inode(pid, kind)
            if inode is None:
                entries.append(NamespaceIdentity(kind))
            else:
                entries.append(NamespaceIdentity(kind, inode, True))
        return ProcessNamespaceSet(pid, tuple(entries))

    def compare(self, pid_a: int, pid_b: int) -> list[NamespaceComparison]:
        """
        Compare the namespaces of two processes.

        Only kinds readable on both sides are reported; the result is
        symmetric in its shared flags.
        """
        set_a = self.list_namespaces(pid_a)
        set_b = self.list_namespaces(pid_b)
        comparisons = []
        for a, b in zip(set_a.entries, set_b.entries):
            if a.available and b.available:
                comparisons.append(NamespaceComparison(a.kind, a.inode == b.inode, a.inode, b.inode))
        return comparisons

    def is_isolated(self, pid: int, kind: NamespaceKind) -> bool:
        """True when ``pid`` is in a different ``kind`` namespace than pid 1."""
        init_inode = self._ns_inode(INIT_PID, kind)
        if init_inode is None:
            raise NotFound(f"cannot read {kind.value} namespace of pid {INIT_PID}")
        inode = self._ns_inode(pid, kind)
        if inode is None:
            raise NotFound(f"cannot read {kind.value} namespace of pid {pid}")
        return inode != init_inode

    def find_in_namespace(self, inode: int, kind: NamespaceKind, limit: int) -> list[int]:
        """Pids whose ``kind`` namespace is ``inode``, at most ``limit``, in scan order."""
        if limit <= 0:
            raise PreconditionViolated(f"limit must be positive, got {limit}")
        matches = []
        for pid in self._iter_pids():
            if self._ns_inode(pid, kind) == inode:
                matches.append(pid)
                if len(matches) >= limit:
                    break
        return matches

    def statistics(self, cap: int | None = None) -> NamespaceStatistics:
        """
        Count distinct namespaces per kind across the process table.

        At most ``cap`` distinct inodes are recorded per kind; a kind that
        reaches the cap is listed in ``saturated`` and its count is a lower
        bound.
        """
        cap = self._settings.namespace_cap if cap is None else cap
        if cap <= 0:
            raise PreconditionViolated(f"cap must be positive, got {cap}")

        seen: dict[NamespaceKind, set[int]] = {kind: set() for kind in NamespaceKind}
        saturated: set[NamespaceKind] = set()
        total = 0
        for pid in self._iter_pids():
            total += 1
            for kind in NamespaceKind:
                inode = self._ns_inode(pid, kind)
                if inode is None or inode in seen[kind]:
                    continue
                if len(seen[kind]) < cap:
                    seen[kind].add(inode)
                elif kind not in saturated:
                    logger.warning("more than %d %s namespaces; count truncated", cap, kind.value)
                    saturated.add(kind)

        return NamespaceStatistics(
            total_processes_analyzed=total,
            unique_counts={kind: len(inodes) for kind, inodes in seen.items()},
            cap=cap,
            saturated=frozenset(saturated),
        )

    def measure_creation_time(self, kind: NamespaceKind) -> float:
        """
        Time a fork + unshare() of ``kind`` in a throwaway child.

        Returns:
            Elapsed wall time in microseconds.

        Raises:
            PreconditionViolated: ``kind`` is the time namespace.
            PermissionDenied: The child could not create the namespace.
        """
        flags = _unshare_flags().get(kind)
        if flags is None:
            raise PreconditionViolated(f"cannot measure creation of a {kind.value} namespace")

        start = time.perf_counter_ns()
        pid = os.fork()
        if pid == 0:
            try:
                os.unshare(flags)
            except OSError:
                os._exit(1)
            os._exit(0)

        _, status = os.waitpid(pid, 0)
        elapsed_ns = time.perf_counter_ns() - start
        if os.waitstatus_to_exitcode(status) != 0:
            raise PermissionDenied(f"unshare({kind.value}) failed; usually needs CAP_SYS_ADMIN")
        return elapsed_ns / 1000
