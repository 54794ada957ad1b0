"""Tap device leases.

A lease is an exclusive, non-blocking ``flock`` on ``<lock_dir>/<tap>.lock``.
Candidates are the host's existing ``tap*`` interfaces in natural order
(tap0, tap1, ..., tap10). A ``<tap>.skip`` file excludes a device. When
every candidate is busy, a new tap is created with ``sudo runqemu-ifup``
unless the no-sudo marker file exists.

Lock files are never deleted. Deleting after close lets one process lock
the old inode while another creates a new file and locks that, so both
would believe they own the device.
"""

from __future__ import annotations

import contextlib
import fcntl
import os
import re
import shutil
import subprocess
from pathlib import Path
from types import TracebackType
from typing import IO

import psutil

from runqemu import constants
from runqemu._logging import get_logger
from runqemu.exceptions import NoTapDeviceError
from runqemu.settings import Settings

logger = get_logger(__name__)

_TAP_SUFFIX_RE = re.compile(r"(\d+)$")


def _natural_key(name: str) -> tuple[int, str]:
    match = _TAP_SUFFIX_RE.search(name)
    return (int(match.group(1)) if match else 1 << 30, name)


def list_tap_candidates() -> list[str]:
    """Host interfaces named tap*, ordered by numeric suffix."""
    names = [name for name in psutil.net_if_stats() if name.startswith(constants.TAP_PREFIX)]
    return sorted(names, key=_natural_key)


def helper_path(helper: str, native_sysroot: Path | None) -> str | None:
    """Locate a helper script in ``<sysroot>/usr/bin`` or on PATH."""
    search = [os.environ.get("PATH", os.defpath)]
    if native_sysroot is not None:
        search.insert(0, str(native_sysroot / "usr" / "bin"))
    return shutil.which(helper, path=os.pathsep.join(search))


def try_lock(lock_path: Path) -> IO[bytes] | None:
    """Open and flock ``lock_path`` without blocking.

    Returns None if another process holds the lock, or if the file belongs
    to another user and cannot be opened. flock needs only a read-only fd,
    so a lock file created by one user stays usable by the others.
    """
    try:
        fd = os.open(lock_path, os.O_RDONLY | os.O_CREAT, 0o666)
    except PermissionError:
        logger.debug("No permission to open %s", lock_path)
        return None
    handle = os.fdopen(fd, "rb")
    try:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        handle.close()
        return None
    return handle


class TapLease:
    """Exclusive use of one tap device for the lifetime of a session.

    ``release()`` is idempotent. For a device this session created, it
    also runs ``sudo runqemu-ifdown`` before dropping the lock.
    """

    def __init__(
        self,
        name: str,
        lock_path: Path,
        handle: IO[bytes],
        *,
        preconfigured: bool,
        teardown: list[str] | None = None,
    ) -> None:
        self.name = name
        self.lock_path = lock_path
        self.preconfigured = preconfigured
        self._handle: IO[bytes] | None = handle
        self._teardown = teardown

    @property
    def released(self) -> bool:
        return self._handle is None

    def release(self) -> None:
        if self._handle is None:
            return
        try:
            if self._teardown:
                logger.info("Releasing tap device %s", self.name)
                try:
                    result = subprocess.run(self._teardown, capture_output=True, text=True, check=False)  # noqa: S603
                except OSError as e:
                    logger.error("Failed to tear down %s: %s", self.name, e)
                else:
                    if result.returncode != 0:
                        logger.error("Failed to tear down %s: %s", self.name, result.stderr.strip())
        finally:
            handle, self._handle = self._handle, None
            handle.close()  # closing the fd drops the flock
            logger.debug("Released lock %s", self.lock_path)

    def __enter__(self) -> TapLease:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.release()


def _ensure_lock_dir(lock_dir: Path) -> None:
    if lock_dir.is_dir():
        return
    try:
        lock_dir.mkdir(parents=True)
        lock_dir.chmod(0o777)
    except FileExistsError:
        pass
    except OSError as e:
        raise NoTapDeviceError(
            f"cannot create tap lock directory {lock_dir}: {e}",
            context={"lock_dir": str(lock_dir)},
        ) from e


def acquire_tap_lease(
    settings: Settings,
    native_sysroot: Path | None,
    candidates: list[str] | None = None,
) -> TapLease:
    """Lease the first free tap device, creating one if none is free.

    Raises:
        NoTapDeviceError: Every candidate is locked and a new device
            cannot or may not be created.
    """
    lock_dir = settings.lock_dir
    _ensure_lock_dir(lock_dir)

    for tap in list_tap_candidates() if candidates is None else candidates:
        if (lock_dir / f"{tap}{constants.TAP_SKIP_SUFFIX}").exists():
            logger.debug("Skipping %s (skip file present)", tap)
            continue
        lock_path = lock_dir / f"{tap}{constants.TAP_LOCK_SUFFIX}"
        logger.debug("Acquiring lockfile %s", lock_path)
        handle = try_lock(lock_path)
        if handle is None:
            logger.debug("%s is in use by another session", tap)
            continue
        logger.info("Using preconfigured tap device '%s'", tap)
        logger.info(
            "If this is not intended, touch %s to make runqemu skip it",
            lock_dir / f"{tap}{constants.TAP_SKIP_SUFFIX}",
        )
        return TapLease(tap, lock_path, handle, preconfigured=True)

    return _create_tap(settings, native_sysroot, lock_dir)


def _create_tap(settings: Settings, native_sysroot: Path | None, lock_dir: Path) -> TapLease:
    if settings.nosudo_flag.exists():
        raise NoTapDeviceError(
            "there are no available tap devices to use for networking",
            context={"nosudo_flag": str(settings.nosudo_flag)},
            hint=f"{settings.nosudo_flag} exists, so no new device is created with sudo; "
            "free a tap device, or use the 'slirp' keyword",
        )
    ifup = helper_path(settings.ifup_helper, native_sysroot)
    if ifup is None:
        raise NoTapDeviceError(
            f"'{settings.ifup_helper}' not found, cannot create a tap device",
            hint="Source the SDK environment, or use the 'slirp' keyword",
        )
    sysroot = str(native_sysroot or "")
    logger.info("Setting up tap interface under sudo")
    try:
        result = subprocess.run(  # noqa: S603
            ["sudo", ifup, str(os.getuid()), str(os.getgid()), sysroot],  # noqa: S607
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError as e:
        raise NoTapDeviceError(
            f"cannot run sudo {settings.ifup_helper}: {e}",
            context={"helper": ifup},
            hint="Install sudo, or use the 'slirp' keyword",
        ) from e
    tap = result.stdout.strip().splitlines()[-1].strip() if result.stdout.strip() else ""
    if result.returncode != 0 or not tap:
        raise NoTapDeviceError(
            f"{settings.ifup_helper} failed to create a tap device",
            context={"returncode": result.returncode, "stderr": result.stderr.strip()},
            hint=result.stderr.strip() or None,
        )

    teardown = None
    ifdown = helper_path(settings.ifdown_helper, native_sysroot)
    if ifdown is not None:
        teardown = ["sudo", ifdown, tap, sysroot]

    lock_path = lock_dir / f"{tap}{constants.TAP_LOCK_SUFFIX}"
    handle = try_lock(lock_path)
    if handle is None:
        if teardown:
            with contextlib.suppress(OSError):
                subprocess.run(teardown, check=False)  # noqa: S603
        raise NoTapDeviceError(f"created {tap} but its lock {lock_path} is held by another session")
    return TapLease(tap, lock_path, handle, preconfigured=False, teardown=teardown)
