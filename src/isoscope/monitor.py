"""Background polling of one process's cgroup and namespaces."""

import logging
import threading
from collections import deque
from dataclasses import dataclass
from queue import Queue

import psutil

from isoscope.config import Settings
from isoscope.errors import IsoscopeError
from isoscope.metrics import MetricReader, compute_rates
from isoscope.models import CgroupMetricsSnapshot, CgroupRates, ProcessNamespaceSet
from isoscope.namespaces import NamespaceInspector

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ProcessInfo:
    """Identity of the monitored process."""

    pid: int
    name: str
    username: str
    status: str  # 'running', 'sleeping', 'zombie', etc.
    threads: int
    command_line: str


@dataclass(slots=True)
class MonitorSample:
    """One poll of the monitored process."""

    process: ProcessInfo | None
    snapshot: CgroupMetricsSnapshot | None
    rates: CgroupRates | None
    namespaces: ProcessNamespaceSet
    error: str | None = None


def read_process_info(pid: int) -> ProcessInfo | None:
    """
    Read name, owner and command line of ``pid`` with psutil.

    Returns None if the process is gone or hidden from us.
    """
    try:
        proc = psutil.Process(pid)
        with proc.oneshot():
            cmdline = proc.cmdline()
            name = proc.name()
            return ProcessInfo(
                pid=pid,
                name=name,
                username=proc.username(),
                status=proc.status(),
                threads=proc.num_threads(),
                command_line=" ".join(cmdline) if cmdline else name,
            )
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return None


class CgroupMonitor:
    """
    Polls a process's cgroup metrics in a daemon thread.

    Samples go to a thread-safe Queue. The previous snapshot is kept only to
    feed compute_rates(); read failures are reported inside the sample so
    the loop keeps running.
    """

    def __init__(
        self,
        update_queue: Queue[MonitorSample],
        pid: int,
        poll_rate: float = 1.0,
        settings: Settings | None = None,
    ) -> None:
        """
        Initialize the CgroupMonitor.

        Args:
            update_queue: Thread-safe queue to push samples to.
            pid: Process to watch.
            poll_rate: Seconds between polls. Default 1.0s.
            settings: Filesystem roots; defaults to the live system.
        """
        settings = settings or Settings()
        self._queue = update_queue
        self._pid = pid
        self._poll_rate = poll_rate
        self._reader = MetricReader(settings)
        self._namespaces = NamespaceInspector(settings)
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._previous: CgroupMetricsSnapshot | None = None
        self._sample_lock = threading.Lock()
        self._cpu_history: deque[float] = deque(maxlen=60)

    @property
    def pid(self) -> int:
        return self._pid

    @property
    def poll_rate(self) -> float:
        return self._poll_rate

    @poll_rate.setter
    def poll_rate(self, value: float) -> None:
        self._poll_rate = max(0.1, value)  # Minimum 0.1 seconds

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the monitoring thread."""
        if self.is_running:
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._poll_loop,
            daemon=True,
            name="CgroupMonitor",
        )
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        """Stop the monitoring thread and wait up to ``timeout`` seconds."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _poll_loop(self) -> None:
        """Main polling loop running in the background thread."""
        while not self._stop_event.is_set():
            try:
                self._queue.put(self.collect_sample())
            except Exception:
                # keep the loop alive; the next poll may succeed
                logger.exception("pid %d: poll failed", self._pid)

            self._stop_event.wait(timeout=self._poll_rate)

    def collect_sample(self) -> MonitorSample:
        """Take one sample now; also used directly by one-shot callers."""
        with self._sample_lock:
            return self._collect_sample()

    def _collect_sample(self) -> MonitorSample:
        """Read the snapshot, rates, process info and namespaces once."""
        snapshot = rates = error = None
        try:
            snapshot = self._reader.snapshot_for_pid(self._pid)
        except IsoscopeError as exc:
            logger.debug("pid %d: %s", self._pid, exc)
            error = str(exc)

        if snapshot is not None:
            if self._previous is not None and snapshot.taken_at > self._previous.taken_at:
                rates = compute_rates(self._previous, snapshot)
                self._cpu_history.append(rates.cpu_cores)
            self._previous = snapshot

        return MonitorSample(
            process=read_process_info(self._pid),
            snapshot=snapshot,
            rates=rates,
            namespaces=self._namespaces.list_namespaces(self._pid),
            error=error,
        )

    def get_cpu_history(self) -> list[float]:
        """CPU usage in cores over the last polls, oldest first."""
        return list(self._cpu_history)
