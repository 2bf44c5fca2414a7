"""Fake cgroupfs and procfs trees shared by the isoscope tests."""

import os
from pathlib import Path

import pytest

from isoscope.config import Settings
from isoscope.models import NamespaceKind


def write_files(directory: Path, files: dict[str, str]) -> None:
    """Create ``directory`` and write each name -> content pair into it."""
    directory.mkdir(parents=True, exist_ok=True)
    for name, content in files.items():
        (directory / name).write_text(content)


@pytest.fixture
def proc_root(tmp_path: Path) -> Path:
    root = tmp_path / "proc"
    root.mkdir()
    return root


@pytest.fixture
def v2_root(tmp_path: Path) -> Path:
    """A unified (v2) cgroup mount."""
    root = tmp_path / "cgroup"
    write_files(root, {"cgroup.controllers": "cpuset cpu io memory pids\n"})
    return root


@pytest.fixture
def v1_root(tmp_path: Path) -> Path:
    """A legacy (v1) mount with one directory per hierarchy."""
    root = tmp_path / "cgroup"
    for hierarchy in ("cpu", "memory", "blkio", "pids", "cpuset"):
        (root / hierarchy).mkdir(parents=True)
    return root


@pytest.fixture
def v2_settings(v2_root: Path, proc_root: Path) -> Settings:
    return Settings(cgroup_root=v2_root, proc_root=proc_root)


@pytest.fixture
def v1_settings(v1_root: Path, proc_root: Path) -> Settings:
    return Settings(cgroup_root=v1_root, proc_root=proc_root)


@pytest.fixture
def add_process(proc_root: Path, tmp_path: Path):
    """
    Factory adding a process to the fake procfs.

    ``namespaces`` maps a kind to a namespace id; processes given the same id
    for a kind get ``ns/<kind>`` links to the same file, hence the same inode.
    Kinds left out are not exposed, like the time namespace on old kernels.
    """
    nsfs = tmp_path / "nsfs"
    nsfs.mkdir()

    def add(pid: int, cgroup: str | None = None, namespaces: dict[NamespaceKind, str] | None = None) -> Path:
        proc_dir = proc_root / str(pid)
        proc_dir.mkdir()
        if cgroup is not None:
            (proc_dir / "cgroup").write_text(cgroup)
        if namespaces is not None:
            (proc_dir / "ns").mkdir()
            for kind, ns_id in namespaces.items():
                target = nsfs / f"{kind.value}-{ns_id}"
                target.touch()
                os.symlink(target, proc_dir / "ns" / kind.value)
        return proc_dir

    return add


def host_namespaces(**overrides: str) -> dict[NamespaceKind, str]:
    """Namespace ids of a process living in the root namespaces."""
    namespaces = {kind: "host" for kind in NamespaceKind}
    for name, ns_id in overrides.items():
        namespaces[NamespaceKind(name)] = ns_id
    return namespaces


@pytest.fixture
def cgroupfs_rmdir(monkeypatch, tmp_path: Path):
    """
    Make rmdir behave like cgroupfs inside the fake tree.

    On a real cgroupfs the interface files vanish with the directory, so an
    empty cgroup is removable even though it "contains" files.
    """
    real_rmdir = os.rmdir

    def rmdir(path, *args, **kwargs):
        path = Path(path)
        if path.is_dir() and tmp_path in path.parents:
            for child in path.iterdir():
                if child.is_file():
                    child.unlink()
        real_rmdir(path, *args, **kwargs)

    monkeypatch.setattr(os, "rmdir", rmdir)
