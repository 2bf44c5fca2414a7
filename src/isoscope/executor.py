"""Running a command inside a freshly created, limited cgroup."""

import errno
import logging
import os
import signal
import subprocess
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum

import psutil

from isoscope.cgroups import VersionDetector
from isoscope.config import Settings
from isoscope.errors import IsoscopeError, PreconditionViolated
from isoscope.limits import LimitController
from isoscope.metrics import MetricReader
from isoscope.models import CgroupHandle, CgroupMetricsSnapshot, CgroupVersion, Controller

logger = logging.getLogger(__name__)

# Exit statuses reported for a child that never reached its command
EXIT_JOIN_FAILED = 125
EXIT_NOT_EXECUTABLE = 126
EXIT_NOT_FOUND = 127


class ChildState(Enum):
    SPAWNED = "spawned"
    EXITED = "exited"


class ExecutorState(Enum):
    """Lifecycle of one confined run."""

    INIT = "init"
    CGROUP_CREATED = "cgroup_created"
    LIMITS_APPLIED = "limits_applied"
    CHILD_LAUNCHED = "child_launched"
    CHILD_EXITED = "child_exited"
    METRICS_COLLECTED = "metrics_collected"
    CLEANED_UP = "cleaned_up"
    FAILED = "failed"


class ChildProcess:
    """
    An owned child process: SPAWNED until waited on, then EXITED.

    A child that could not exec is created directly in the EXITED state with
    the shell's conventional status (127 not found, 126 not executable, 125
    when it could not join its cgroup).
    """

    def __init__(self, process: psutil.Popen | None, returncode: int | None = None) -> None:
        self._process = process
        self._returncode = returncode

    @classmethod
    def spawn(
        cls,
        argv: Sequence[str],
        before_exec: Callable[[], None] | None = None,
    ) -> "ChildProcess":
        """
        Fork and exec ``argv``.

        Args:
            argv: Command and arguments.
            before_exec: Runs in the child after fork and before exec. If it
                raises, the command is never executed.
        """
        try:
            process = psutil.Popen(list(argv), preexec_fn=before_exec, close_fds=True)
        except subprocess.SubprocessError as exc:
            logger.error("child failed before exec: %s", exc)
            return cls(None, EXIT_JOIN_FAILED)
        except OSError as exc:
            logger.error("cannot execute %s: %s", argv[0], exc)
            status = EXIT_NOT_FOUND if exc.errno == errno.ENOENT else EXIT_NOT_EXECUTABLE
            return cls(None, status)
        return cls(process)

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def state(self) -> ChildState:
        return ChildState.SPAWNED if self._returncode is None else ChildState.EXITED

    @property
    def returncode(self) -> int | None:
        """Exit status; negative when the child was killed by a signal."""
        return self._returncode

    def wait(self) -> int:
        """Block until the child exits and return its status."""
        if self._returncode is None:
            self._returncode = int(self._process.wait())
        return self._returncode

    def send_signal(self, sig: int) -> None:
        """Send ``sig`` to the child if it is still running."""
        if self.state is ChildState.EXITED:
            return
        try:
            self._process.send_signal(sig)
        except psutil.NoSuchProcess:
            pass  # already gone; wait() will report how it ended

    def terminate(self) -> None:
        """Send SIGTERM to the child."""
        self.send_signal(signal.SIGTERM)

    def kill(self) -> None:
        """Send SIGKILL to the child."""
        self.send_signal(signal.SIGKILL)


@dataclass(slots=True, frozen=True)
class IoLimit:
    device: str  # "MAJOR:MINOR"
    read_bps: int
    write_bps: int


@dataclass(slots=True, frozen=True)
class ExecutionLimits:
    """Resource limits for a confined run. None means "leave unlimited"."""

    cpu_cores: float | None = None
    memory_mb: int | None = None
    pids_max: int | None = None
    io: tuple[IoLimit, ...] = ()


@dataclass(slots=True, frozen=True)
class ExecutionResult:
    """Outcome of ConfinedExecutor.run()."""

    exit_status: int
    snapshot: CgroupMetricsSnapshot | None
    state: ExecutorState
    cgroup_paths: tuple[str, ...]
    limit_errors: tuple[IsoscopeError, ...] = ()
    cleanup_errors: tuple[IsoscopeError, ...] = ()


def _handle_for(handles: Sequence[CgroupHandle], controller: Controller) -> CgroupHandle:
    """Pick the handle whose hierarchy carries ``controller``."""
    if handles[0].version is CgroupVersion.V2:
        return handles[0]
    for handle in handles:
        if controller in handle.controllers_present:
            return handle
    raise PreconditionViolated(f"no {controller.value} cgroup was created")


class ConfinedExecutor:
    """
    Runs one command at a time under cgroup limits.

    Limits are best effort: a limit the kernel rejects is logged and the
    command still runs. Cgroup directories created for a run are always
    removed afterwards, whatever happened in between.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        detector: VersionDetector | None = None,
        limiter: LimitController | None = None,
        reader: MetricReader | None = None,
    ) -> None:
        self._settings = settings or Settings()
        self._detector = detector or VersionDetector(self._settings)
        self._limiter = limiter or LimitController(self._settings, self._detector)
        self._reader = reader or MetricReader(self._settings, self._detector)
        self.state = ExecutorState.INIT

    def _transition(self, state: ExecutorState) -> None:
        """Record and log a state change."""
        logger.debug("executor %s -> %s", self.state.value, state.value)
        self.state = state

    def _default_name(self) -> str:
        return f"{self._settings.cgroup_prefix}-{os.getpid()}-{uuid.uuid4().hex[:8]}"

    def _create_cgroups(
        self, name: str, version: CgroupVersion, limits: ExecutionLimits
    ) -> list[CgroupHandle]:
        if version is CgroupVersion.V2:
            wanted = [Controller.CPU, Controller.MEMORY, Controller.PIDS, Controller.IO]
            try:
                self._limiter.enable_controllers(wanted)
            except IsoscopeError as exc:
                logger.warning("could not enable controllers on the cgroup root: %s", exc)
            return [self._limiter.create(name, Controller.CPU)]

        controllers = [Controller.CPU, Controller.MEMORY]
        if limits.pids_max is not None:
            controllers.append(Controller.PIDS)
        if limits.io:
            controllers.append(Controller.BLKIO)

        handles: list[CgroupHandle] = []
        try:
            for controller in controllers:
                handles.append(self._limiter.create(name, controller))
        except IsoscopeError:
            self._cleanup(handles)
            raise
        return handles

    def _apply_limits(
        self, handles: Sequence[CgroupHandle], limits: ExecutionLimits
    ) -> list[IsoscopeError]:
        steps: list[tuple[str, Callable[[], None]]] = []
        if limits.cpu_cores is not None:
            steps.append((
                "cpu",
                lambda: self._limiter.set_cpu_limit(_handle_for(handles, Controller.CPU), limits.cpu_cores),
            ))
        if limits.memory_mb is not None:
            steps.append((
                "memory",
                lambda: self._limiter.set_memory_limit(
                    _handle_for(handles, Controller.MEMORY), limits.memory_mb * 1024 * 1024
                ),
            ))
        if limits.pids_max is not None:
            steps.append((
                "pids",
                lambda: self._limiter.set_pids_limit(_handle_for(handles, Controller.PIDS), limits.pids_max),
            ))
        for io in limits.io:
            steps.append((
                f"io {io.device}",
                lambda io=io: self._limiter.set_io_limit(
                    _handle_for(handles, Controller.BLKIO), io.device, io.read_bps, io.write_bps
                ),
            ))

        errors = []
        for label, apply in steps:
            try:
                apply()
            except IsoscopeError as exc:
                logger.warning("%s limit not applied, running unconstrained: %s", label, exc)
                errors.append(exc)
        return errors

    def _join(self, handles: Sequence[CgroupHandle]) -> None:
        """Move the calling process into every handle; runs in the child before exec."""
        # runs in the forked child, before exec
        pid = os.getpid()
        for handle in handles:
            self._limiter.move_process(pid, handle)

    def _final_snapshot(
        self, handles: Sequence[CgroupHandle], pid: int | None
    ) -> CgroupMetricsSnapshot | None:
        try:
            return self._reader.snapshot_for_handles(handles, pid=pid)
        except IsoscopeError as exc:
            logger.warning("final metrics unavailable: %s", exc)
            return None

    def _cleanup(self, handles: Sequence[CgroupHandle]) -> list[IsoscopeError]:
        errors = []
        for handle in reversed(handles):
            try:
                self._limiter.remove(handle)
            except IsoscopeError as exc:
                logger.error("failed to remove cgroup %s: %s", handle.path, exc)
                errors.append(exc)
        return errors

    def run(
        self,
        argv: Sequence[str],
        limits: ExecutionLimits | None = None,
        name: str | None = None,
        on_spawn: Callable[[ChildProcess], None] | None = None,
    ) -> ExecutionResult:
        """
        Run ``argv`` confined in a new cgroup and wait for it.

        Args:
            argv: Command and arguments.
            limits: Limits to apply; defaults to none (accounting only).
            name: Cgroup directory name; a unique one is generated if omitted.
            on_spawn: Called with the running child, e.g. to arm a timeout
                that signals it. The run still waits for the child to exit.

        Raises:
            UnsupportedVersion: No cgroup hierarchy is mounted.
            PreconditionViolated: ``argv`` is empty.
            IsoscopeError: The cgroup could not be created.
        """
        if not argv:
            raise PreconditionViolated("a command is required")
        limits = limits or ExecutionLimits()
        self.state = ExecutorState.INIT

        try:
            version = self._detector.require_version()
            handles = self._create_cgroups(name or self._default_name(), version, limits)
        except IsoscopeError:
            self._transition(ExecutorState.FAILED)
            raise
        self._transition(ExecutorState.CGROUP_CREATED)

        child: ChildProcess | None = None
        snapshot = None
        limit_errors: list[IsoscopeError] = []
        try:
            limit_errors = self._apply_limits(handles, limits)
            self._transition(ExecutorState.LIMITS_APPLIED)

            child = ChildProcess.spawn(argv, before_exec=lambda: self._join(handles))
            self._transition(ExecutorState.CHILD_LAUNCHED)
            if on_spawn is not None and child.state is ChildState.SPAWNED:
                on_spawn(child)

            exit_status = child.wait()
            self._transition(ExecutorState.CHILD_EXITED)
            logger.info("command %s exited with status %d", argv[0], exit_status)

            snapshot = self._final_snapshot(handles, child.pid)
            if snapshot is not None:
                self._transition(ExecutorState.METRICS_COLLECTED)
        except BaseException:
            self._transition(ExecutorState.FAILED)
            if child is not None and child.state is ChildState.SPAWNED:
                child.kill()
                child.wait()
            raise
        finally:
            cleanup_errors = self._cleanup(handles)

        self._transition(ExecutorState.CLEANED_UP)
        return ExecutionResult(
            exit_status=exit_status,
            snapshot=snapshot,
            state=self.state,
            cgroup_paths=tuple(str(handle.path) for handle in handles),
            limit_errors=tuple(limit_errors),
            cleanup_errors=tuple(cleanup_errors),
        )
