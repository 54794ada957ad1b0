"""Host capability checks with cached results.

All probes are cheap file reads or a single ``ldd`` call, and their answers
cannot change during one invocation, so each result is computed once.
"""

from __future__ import annotations

import os
import shutil
import stat
import subprocess
from pathlib import Path

from runqemu import constants
from runqemu._logging import get_logger
from runqemu.exceptions import KvmUnavailableError, MissingLibraryError, TunDeviceError
from runqemu.settings import Settings

__all__ = [
    "HostChecks",
    "check_gl_libraries",
    "cpu_supports_virtualization",
    "emulator_links_nvidia",
    "gl_preload_for",
]

logger = get_logger(__name__)

_GL_SEARCH_DIRS = ("/usr/lib", "/usr/lib64", "/usr/lib/x86_64-linux-gnu", "/usr/lib/i386-linux-gnu")
_LSB_RELEASE = Path("/etc/lsb-release")


class _ProbeCache:
    """Container for cached probe results, keyed by the probed path."""

    __slots__ = ("cpu_virt", "gl_libs", "nvidia")

    def __init__(self) -> None:
        self.cpu_virt: dict[str, bool] = {}
        self.gl_libs: tuple[bool, bool] | None = None
        self.nvidia: dict[str, bool] = {}

    def clear(self) -> None:
        self.cpu_virt.clear()
        self.gl_libs = None
        self.nvidia.clear()


_probe_cache = _ProbeCache()


def cpu_supports_virtualization(cpuinfo: Path) -> bool:
    """True if /proc/cpuinfo lists the vmx or svm flag (cached)."""
    key = str(cpuinfo)
    if key not in _probe_cache.cpu_virt:
        try:
            text = cpuinfo.read_text(errors="replace")
        except OSError as e:
            logger.debug("Cannot read %s: %s", cpuinfo, e)
            text = ""
        flags: set[str] = set()
        for line in text.splitlines():
            name, _, value = line.partition(":")
            if name.strip() == "flags":
                flags.update(value.split())
        _probe_cache.cpu_virt[key] = any(flag in flags for flag in constants.KVM_CPU_FLAGS)
    return _probe_cache.cpu_virt[key]


def _find_library(name: str) -> bool:
    return any(Path(directory, name).exists() for directory in _GL_SEARCH_DIRS)


def check_gl_libraries() -> None:
    """Require libGL and libGLU, which QEMU's SDL display links against.

    Raises:
        MissingLibraryError: Either library is absent from the usual lib dirs.
    """
    if _probe_cache.gl_libs is None:
        _probe_cache.gl_libs = (_find_library("libGL.so"), _find_library("libGLU.so"))
    has_gl, has_glu = _probe_cache.gl_libs
    if has_gl and has_glu:
        return
    missing = [lib for lib, found in (("libGL.so", has_gl), ("libGLU.so", has_glu)) if not found]
    raise MissingLibraryError(
        f"{' and '.join(missing)} must exist in your library path to run the QEMU emulator",
        context={"missing": missing},
        hint=(
            "Ubuntu packages: libgl1-mesa-dev libglu1-mesa-dev; "
            "Fedora packages: mesa-libGL-devel mesa-libGLU-devel"
        ),
    )


def emulator_links_nvidia(emulator: str) -> bool:
    """True if ``ldd`` shows the emulator picking up nVidia's libGL (cached)."""
    if emulator not in _probe_cache.nvidia:
        ldd = shutil.which("ldd")
        found = False
        if ldd is not None:
            result = subprocess.run(  # noqa: S603
                [ldd, emulator], capture_output=True, text=True, check=False
            )
            found = "nvidia" in result.stdout.lower()
        _probe_cache.nvidia[emulator] = found
    return _probe_cache.nvidia[emulator]


def _is_ubuntu() -> bool:
    try:
        return "ubuntu" in _LSB_RELEASE.read_text(errors="replace").lower()
    except OSError:
        return False


def gl_preload_for(emulator: str, current: str | None) -> str | None:
    """LD_PRELOAD value for launching ``emulator``.

    nVidia's proprietary libGL crashes QEMU. On Ubuntu the mesa libGL is
    preloaded ahead of it; elsewhere only a warning is logged.
    """
    if not emulator_links_nvidia(emulator):
        return current
    logger.warning(
        "nVidia proprietary OpenGL libraries detected. They are known to crash qemu; "
        "uninstall them or make sure mesa's libGL precedes them via LD_PRELOAD"
    )
    if not _is_ubuntu():
        return current
    for directory in _GL_SEARCH_DIRS:
        candidate = Path(directory, "libGL.so")
        if candidate.exists():
            logger.info("Preloading %s to skip nVidia's libGL", candidate)
            return f"{candidate} {current}".strip() if current else str(candidate)
    return current


class HostChecks:
    """Device-node and CPU preconditions checked during resolution."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def require_tun(self) -> None:
        """Raises TunDeviceError unless the TUN device is a writable char device."""
        tun = self._settings.tun_device
        try:
            mode = tun.stat().st_mode
        except OSError:
            mode = 0
        if not stat.S_ISCHR(mode):
            raise TunDeviceError(
                f"TUN control device {tun} is unavailable",
                hint="Enable TUN (e.g. sudo modprobe tun), or use the 'slirp' keyword",
            )
        if not os.access(tun, os.W_OK):
            raise TunDeviceError(
                f"TUN control device {tun} is not writable",
                hint=f"Fix its permissions (e.g. sudo chmod 666 {tun}), or use the 'slirp' keyword",
            )

    def require_kvm(self) -> None:
        """Raises KvmUnavailableError without VT support or an accessible /dev/kvm."""
        if not cpu_supports_virtualization(self._settings.cpuinfo):
            raise KvmUnavailableError(
                "you are trying to enable KVM on a cpu without VT support",
                hint=f"Remove 'kvm' from the command line, or see {constants.YOCTO_KVM_URL}",
            )
        self._require_rw_device(self._settings.kvm_device, "KVM device", "Have you inserted the kvm modules?")

    def require_vhost(self) -> None:
        self._require_rw_device(
            self._settings.vhost_device, "virtio net device", "Have you inserted the vhost-net module?"
        )

    @staticmethod
    def _require_rw_device(device: Path, label: str, question: str) -> None:
        if not device.exists():
            raise KvmUnavailableError(
                f"missing {label} {device}. {question}",
                hint=f"See {constants.YOCTO_KVM_URL}",
            )
        if not os.access(device, os.R_OK | os.W_OK):
            raise KvmUnavailableError(
                f"you have no rights on {device}",
                hint=f"Change the ownership of this file as described at {constants.YOCTO_KVM_URL}",
            )
