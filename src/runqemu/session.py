"""Session runner: acquire host resources, launch QEMU, release everything.

Every resource is entered on one ExitStack, so the release path is the
same for a normal exit, an error before launch and a termination signal:

    signal handlers -> terminal settings -> tap lease -> NFS export -> QEMU child

are unwound in reverse order. SIGINT, SIGTERM and SIGQUIT are turned into
TerminationRequested while the session runs. Once the unwind starts they are
only recorded, and the first one is raised after the last release step. The
CLI re-delivers the signal once the stack has unwound.
"""

from __future__ import annotations

import contextlib
import os
import shlex
import signal
import subprocess
import sys
import termios
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from types import FrameType
from typing import Any

import psutil

from runqemu import constants
from runqemu._logging import get_logger
from runqemu.exceptions import (
    EmulatorNotFoundError,
    ImageConversionError,
    ImageNotFoundError,
    TerminationRequested,
)
from runqemu.models import ImageConversion, NetworkBinding, NetworkMode, RootfsFormat, RunConfiguration, TargetProfile
from runqemu.nfs import NfsExport
from runqemu.qemu_cmd import build_profile
from runqemu.resource_cleanup import cleanup_file, cleanup_process
from runqemu.settings import Settings
from runqemu.system_probes import check_gl_libraries, gl_preload_for
from runqemu.tap import TapLease, acquire_tap_lease, helper_path

logger = get_logger(__name__)

TERMINATION_SIGNALS: tuple[signal.Signals, ...] = (signal.SIGINT, signal.SIGTERM, signal.SIGQUIT)


class SignalGuard:
    """Turns termination signals into TerminationRequested.

    While deferring, a signal is only recorded. The first recorded signal
    is raised when the deferred section (or the whole guard) exits, so a
    release step is never cut short.
    """

    __slots__ = ("deferring", "pending")

    def __init__(self) -> None:
        self.deferring = False
        self.pending: int | None = None

    def handle(self, signum: int, _frame: FrameType | None) -> None:
        if not self.deferring:
            raise TerminationRequested(signum)
        if self.pending is None:
            self.pending = signum
        logger.warning("Received signal %d, finishing cleanup first", signum)

    def defer(self) -> None:
        """Record signals from now until the guard exits."""
        self.deferring = True

    @contextlib.contextmanager
    def deferred(self) -> Iterator[None]:
        """Record signals inside the block, then raise the first one."""
        self.deferring = True
        try:
            yield
        finally:
            self.deferring = False
        if self.pending is not None:
            raise TerminationRequested(self.pending)


@contextlib.contextmanager
def signal_guard(signals: tuple[signal.Signals, ...] = TERMINATION_SIGNALS) -> Iterator[SignalGuard]:
    """Raise TerminationRequested on ``signals`` until the block exits."""
    guard = SignalGuard()
    previous: dict[signal.Signals, Any] = {}
    try:
        for signum in signals:
            previous[signum] = signal.signal(signum, guard.handle)
        yield guard
    except Exception as e:
        if guard.pending is None:
            raise
        raise TerminationRequested(guard.pending) from e
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)
    if guard.pending is not None:
        raise TerminationRequested(guard.pending)


@dataclass(slots=True)
class TerminalState:
    """Saved tty attributes of stdin, or nothing when stdin is not a tty."""

    fd: int | None = None
    saved: list[Any] | None = None

    def set_interrupt_char(self, char: str) -> None:
        if self.fd is None:
            return
        attrs = termios.tcgetattr(self.fd)
        attrs[6][termios.VINTR] = char.encode()
        termios.tcsetattr(self.fd, termios.TCSADRAIN, attrs)


def _stdin_tty_fd() -> int | None:
    try:
        fd = sys.stdin.fileno()
    except (AttributeError, OSError, ValueError):
        return None
    return fd if os.isatty(fd) else None


@contextlib.contextmanager
def terminal_guard() -> Iterator[TerminalState]:
    """Restore stdin's tty settings on exit; QEMU's stdio modes change them."""
    fd = _stdin_tty_fd()
    if fd is None:
        yield TerminalState()
        return
    saved = termios.tcgetattr(fd)
    try:
        yield TerminalState(fd, saved)
    finally:
        try:
            termios.tcsetattr(fd, termios.TCSADRAIN, saved)
        except termios.error as e:
            logger.error("Failed to restore terminal settings: %s", e)


def exit_code_from(returncode: int) -> int:
    """Map a child's returncode to a shell-style exit status (-9 -> 137)."""
    return 128 - returncode if returncode < 0 else returncode


def check_boot_files(config: RunConfiguration, profile: TargetProfile) -> None:
    """Raises ImageNotFoundError when a file the emulator needs is missing."""
    if config.vm is not None:
        if not config.vm.is_file():
            raise ImageNotFoundError(f"disk image {config.vm} doesn't exist")
        return
    if profile.kernel_cmdline is not None and (config.kernel is None or not config.kernel.is_file()):
        raise ImageNotFoundError(f"kernel image file {config.kernel} doesn't exist")
    if config.rootfs_format is RootfsFormat.NFS:
        export = profile.nfs_export
        local = (constants.DEFAULT_NFS_SERVER_TAP, constants.DEFAULT_NFS_SERVER_SLIRP)
        if export is not None and export.server in local and not Path(export.directory).is_dir():
            raise ImageNotFoundError(f"NFS mount point {export.directory} doesn't exist")
        return
    if config.rootfs is None or not Path(config.rootfs).is_file():
        raise ImageNotFoundError(f"image file {config.rootfs} doesn't exist")


def convert_image(conversion: ImageConversion, native_sysroot: Path | None) -> None:
    """Produce ``conversion.output`` unless it already exists.

    Raises:
        ImageConversionError: Helper missing or failed; partial output is removed.
    """
    if conversion.output.exists():
        logger.debug("Reusing converted image %s", conversion.output)
        return
    helper = helper_path(conversion.helper, native_sysroot)
    if helper is None:
        raise ImageConversionError(
            f"'{conversion.helper}' not found, cannot create {conversion.output.name}",
            hint="Source the SDK environment so the image conversion helpers are on PATH",
        )
    logger.info("Converting %s for use by QEMU, please wait...", conversion.source.name)
    try:
        if conversion.pipe:
            with conversion.source.open("rb") as src, conversion.output.open("wb") as dst:
                result = subprocess.run([helper], stdin=src, stdout=dst, stderr=subprocess.PIPE, check=False)  # noqa: S603
        else:
            result = subprocess.run(  # noqa: S603
                [helper, str(conversion.source), str(conversion.output)], capture_output=True, check=False
            )
    except OSError as e:
        cleanup_file(conversion.output, "converted image")
        raise ImageConversionError(f"{conversion.helper} failed: {e}") from e
    if result.returncode != 0:
        cleanup_file(conversion.output, "converted image")
        raise ImageConversionError(
            f"{conversion.helper} failed with exit code {result.returncode}",
            context={"stderr": result.stderr.decode(errors="replace").strip()},
        )


class Session:
    """One emulator run for a resolved configuration.

    Attributes:
        lease: Tap lease held by the last run (tap mode only).
        profile: Profile built by the last run.
    """

    def __init__(
        self,
        config: RunConfiguration,
        settings: Settings,
        *,
        tap_candidates: list[str] | None = None,
    ) -> None:
        self.config = config
        self.settings = settings
        self._tap_candidates = tap_candidates
        self.lease: TapLease | None = None
        self.profile: TargetProfile | None = None

    @property
    def native_sysroot(self) -> Path | None:
        return self.config.native_sysroot or self.settings.native_sysroot

    def run(self) -> int:
        """Boot the guest and block until QEMU exits.

        Returns:
            QEMU's exit status (128+N when killed by signal N).

        Raises:
            RunQemuError: A precondition failed; everything acquired so far
                has been released.
            TerminationRequested: A termination signal arrived; everything
                has been released.
        """
        with contextlib.ExitStack() as stack:
            guard = stack.enter_context(signal_guard())
            try:
                returncode = self._boot(stack, guard)
            finally:
                # Signals during the unwind below are re-raised once it completes
                guard.defer()

        logger.info("Emulator exited with %s", returncode)
        return exit_code_from(returncode)

    def _boot(self, stack: contextlib.ExitStack, guard: SignalGuard) -> int:
        terminal = stack.enter_context(terminal_guard())
        binding = self._acquire_network(stack)

        profile = build_profile(self.config, binding)
        self.profile = profile
        check_boot_files(self.config, profile)

        if profile.nfs_export is not None:
            stack.enter_context(NfsExport(profile.nfs_export, self.settings, self.native_sysroot))
        if profile.conversion is not None:
            convert_image(profile.conversion, self.native_sysroot)

        emulator = self._find_emulator(profile)
        env = self._launch_env(profile, emulator)
        argv = [emulator, *profile.argv[1:]]

        if profile.serial_stdio:
            terminal.set_interrupt_char(constants.SERIAL_INTERRUPT_CHAR)
            logger.info("Interrupt character is '^]'")

        logger.info("Running %s", shlex.join(argv))
        # The child is registered for cleanup before any signal can interrupt
        with guard.deferred():
            proc = psutil.Popen(argv, env=env)  # noqa: S603
            stack.callback(cleanup_process, proc, profile.emulator)
        return int(proc.wait())

    def _acquire_network(self, stack: contextlib.ExitStack) -> NetworkBinding:
        if self.config.network_mode is NetworkMode.SLIRP:
            return NetworkBinding.slirp()
        lease = stack.enter_context(acquire_tap_lease(self.settings, self.native_sysroot, self._tap_candidates))
        self.lease = lease
        return NetworkBinding.for_tap(lease.name)

    def _find_emulator(self, profile: TargetProfile) -> str:
        emulator = helper_path(profile.emulator, self.native_sysroot)
        if emulator is None:
            raise EmulatorNotFoundError(
                f"no QEMU binary '{profile.emulator}' could be found",
                context={"emulator": profile.emulator, "sysroot": str(self.native_sysroot)},
                hint="Build qemu-native or install QEMU, and source the SDK environment",
            )
        return emulator

    @staticmethod
    def _launch_env(profile: TargetProfile, emulator: str) -> dict[str, str]:
        env = {**os.environ, **profile.env}
        if "-nographic" not in profile.argv:
            check_gl_libraries()
        preload = gl_preload_for(emulator, os.environ.get("LD_PRELOAD"))
        if preload:
            env["LD_PRELOAD"] = preload
        return env
