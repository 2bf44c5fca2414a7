"""Exceptions raised by isoscope."""

import errno
from pathlib import Path


class IsoscopeError(Exception):
    """Base class for every isoscope failure."""


class UnsupportedVersion(IsoscopeError):
    """No usable cgroup hierarchy was detected on this host."""


class NotFound(IsoscopeError):
    """A process, cgroup or namespace could not be resolved."""


class PermissionDenied(IsoscopeError):
    """The kernel refused access; usually a privileged-only file."""


class MalformedData(IsoscopeError):
    """A file existed but its content did not have the expected shape."""


class PreconditionViolated(IsoscopeError, ValueError):
    """An argument was outside the range the operation accepts."""


class ResourceBusy(IsoscopeError):
    """A cgroup could not be removed because it still has members."""


class CgroupIOError(IsoscopeError):
    """A cgroupfs write or mkdir failed for a reason not covered above."""

    def __init__(self, message: str, errno_value: int | None = None) -> None:
        super().__init__(message)
        self.errno = errno_value


def translate_os_error(exc: OSError, path: Path | str) -> IsoscopeError:
    """Map an OSError raised while touching ``path`` onto the taxonomy."""
    code = exc.errno
    reason = exc.strerror or str(exc)
    if code in (errno.EACCES, errno.EPERM):
        return PermissionDenied(f"{path}: {reason}")
    if code == errno.ENOENT:
        return NotFound(f"{path}: {reason}")
    if code in (errno.ENOTEMPTY, errno.EBUSY):
        return ResourceBusy(f"{path}: {reason}")
    return CgroupIOError(f"{path}: {reason}", code)
