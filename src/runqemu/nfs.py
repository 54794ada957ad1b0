"""User-space NFS export of a rootfs directory for the session's lifetime."""

from __future__ import annotations

import os
import subprocess
from pathlib import Path
from types import TracebackType

from runqemu import constants
from runqemu._logging import get_logger
from runqemu.exceptions import NfsExportError
from runqemu.models import NfsExportSpec, NfsPorts
from runqemu.settings import Settings
from runqemu.tap import helper_path

logger = get_logger(__name__)


class NfsExport:
    """Runs ``runqemu-export-rootfs restart`` on enter and ``stop`` on exit.

    The helper reads NFS_INSTANCE to pick its port range, which matches
    ``NfsPorts.for_instance`` and the ports in the guest's nfsroot option.
    """

    def __init__(self, spec: NfsExportSpec, settings: Settings, native_sysroot: Path | None = None) -> None:
        self.spec = spec
        self.ports = NfsPorts.for_instance(spec.instance)
        self._settings = settings
        self._native_sysroot = native_sysroot
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def _command(self, verb: str) -> list[str]:
        helper = helper_path(self._settings.export_helper, self._native_sysroot)
        if helper is None:
            raise NfsExportError(
                f"'{self._settings.export_helper}' not found",
                hint="Source the SDK environment so the NFS export helper is on PATH",
            )
        return [helper, verb, self.spec.rootfs]

    def _env(self) -> dict[str, str]:
        return {
            **os.environ,
            "NFS_INSTANCE": str(self.spec.instance),
            "PSEUDO_LOCALSTATEDIR": os.path.expanduser(constants.PSEUDO_STATE_DIR),
        }

    def start(self) -> None:
        """Raises NfsExportError if the helper is missing or fails."""
        command = self._command("restart")
        logger.info("%s restart %s", self._settings.export_helper, self.spec.rootfs)
        try:
            result = subprocess.run(command, env=self._env(), capture_output=True, text=True, check=False)  # noqa: S603
        except OSError as e:
            raise NfsExportError(f"cannot run {self._settings.export_helper}: {e}") from e
        if result.returncode != 0:
            raise NfsExportError(
                f"failed to export {self.spec.rootfs} over NFS",
                context={
                    "returncode": result.returncode,
                    "output": (result.stdout + result.stderr).strip(),
                    "nfsd_port": self.ports.nfsd,
                    "mountd_port": self.ports.mountd,
                },
            )
        self._running = True

    def stop(self) -> None:
        """Stop the server if this object started it. Logs instead of raising."""
        if not self._running:
            return
        self._running = False
        try:
            command = self._command("stop")
            result = subprocess.run(  # noqa: S603
                command, env=self._env(), capture_output=True, text=True, check=False
            )
        except (NfsExportError, OSError) as e:
            logger.error("Failed to stop NFS export of %s: %s", self.spec.rootfs, e)
            return
        if result.returncode != 0:
            logger.error("Failed to stop NFS export of %s: %s", self.spec.rootfs, result.stderr.strip())

    def __enter__(self) -> NfsExport:
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.stop()
