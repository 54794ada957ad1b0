"""Shared pytest fixtures for runqemu tests.

No test needs root, /dev/kvm, a build tree or QEMU: host checks are
replaced by FakeHostChecks, build paths come from Settings, and helper
programs are small shell scripts written into tmp_path.
"""

import logging
import os
import stat
from collections.abc import Iterator
from pathlib import Path

import pytest

from runqemu.exceptions import KvmUnavailableError, TunDeviceError
from runqemu.resolver import Resolver
from runqemu.settings import Settings
from runqemu.system_probes import HostChecks, _probe_cache

# Variables the launcher reads; the developer's shell must not leak into tests.
RUNQEMU_ENV_VARS = (
    "MACHINE",
    "KERNEL",
    "ROOTFS",
    "VM",
    "OE_TMPDIR",
    "DEPLOY_DIR_IMAGE",
    "OECORE_NATIVE_SYSROOT",
    "NFS_SERVER",
    "SERIAL_LOGFILE",
)


@pytest.fixture(autouse=True)
def _clean_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in RUNQEMU_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    for name in list(os.environ):
        if name.startswith("RUNQEMU_"):
            monkeypatch.delenv(name)


@pytest.fixture(autouse=True)
def _restore_library_logger() -> Iterator[None]:
    # The CLI installs a handler and sets a level on the package logger
    lib_logger = logging.getLogger("runqemu")
    level, handlers = lib_logger.level, list(lib_logger.handlers)
    yield
    lib_logger.setLevel(level)
    lib_logger.handlers[:] = handlers


@pytest.fixture(autouse=True)
def _reset_probe_cache() -> Iterator[None]:
    _probe_cache.clear()
    yield
    _probe_cache.clear()


class FakeHostChecks(HostChecks):
    """Records which host checks ran and fails the ones told to fail."""

    def __init__(self, *, tun: bool = True, kvm: bool = True, vhost: bool = True) -> None:
        self.tun = tun
        self.kvm = kvm
        self.vhost = vhost
        self.calls: list[str] = []

    def require_tun(self) -> None:
        self.calls.append("tun")
        if not self.tun:
            raise TunDeviceError("TUN control device /dev/net/tun is unavailable")

    def require_kvm(self) -> None:
        self.calls.append("kvm")
        if not self.kvm:
            raise KvmUnavailableError("you are trying to enable KVM on a cpu without VT support")

    def require_vhost(self) -> None:
        self.calls.append("vhost")
        if not self.vhost:
            raise KvmUnavailableError("missing virtio net device /dev/vhost-net")


def touch(path: Path, mtime_ns: int | None = None, content: bytes = b"") -> Path:
    """Create ``path`` (and parents), optionally with a fixed mtime."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    if mtime_ns is not None:
        os.utime(path, ns=(mtime_ns, mtime_ns))
    return path


def write_script(path: Path, body: str) -> Path:
    """Write an executable /bin/sh script."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"#!/bin/sh\n{body}\n")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def deploy_dir(tmp_path: Path) -> Path:
    path = tmp_path / "deploy" / "images"
    path.mkdir(parents=True)
    return path


@pytest.fixture
def sysroot(tmp_path: Path) -> Path:
    path = tmp_path / "sysroot"
    (path / "usr" / "bin").mkdir(parents=True)
    return path


@pytest.fixture
def settings(tmp_path: Path, deploy_dir: Path, sysroot: Path) -> Settings:
    """Settings for a build tree that never needs ``bitbake -e``."""
    return Settings(
        oe_tmpdir=tmp_path / "tmp",
        deploy_dir_image=deploy_dir,
        native_sysroot=sysroot,
        lock_dir=tmp_path / "locks",
        nosudo_flag=tmp_path / "runqemu-nosudo",
        build_tool="bitbake-is-not-installed",
    )


@pytest.fixture
def host() -> FakeHostChecks:
    return FakeHostChecks()


@pytest.fixture
def resolver(settings: Settings, host: FakeHostChecks) -> Resolver:
    return Resolver(settings, host=host)
