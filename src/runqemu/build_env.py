"""Lazy, memoized lookup of build tree locations.

Paths come from the environment first (OE_TMPDIR, DEPLOY_DIR_IMAGE,
OECORE_NATIVE_SYSROOT, normally exported by an SDK setup script). Only
when one is missing is ``bitbake -e`` run, at most once per invocation.
"""

from __future__ import annotations

import os
import platform
import re
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

from runqemu import constants
from runqemu._logging import get_logger
from runqemu.exceptions import BuildEnvironmentUnsetError, BuildToolUnavailableError
from runqemu.settings import Settings

logger = get_logger(__name__)

_ASSIGNMENT_RE = re.compile(constants.VARIABLE_ASSIGNMENT_PATTERN, re.MULTILINE)

_RUN_FROM_BUILD_DIR_HINT = (
    "Run from your build directory, or set OE_TMPDIR and DEPLOY_DIR_IMAGE in the environment"
)


@dataclass(frozen=True, slots=True)
class BuildPaths:
    tmp_dir: Path
    deploy_dir: Path | None


def parse_variables(output: str) -> dict[str, str]:
    """Extract ``KEY="value"`` lines from ``bitbake -e`` output.

    Exported (``export KEY="value"``) and commented lines are ignored;
    the plain assignment is what bitbake prints for the final value.
    """
    return {m.group("key"): m.group("value") for m in _ASSIGNMENT_RE.finditer(output)}


def build_sys() -> str:
    """Host triplet fragment used to name the native sysroot (x86_64-linux)."""
    return f"{platform.machine()}-{platform.system().lower()}"


class BuildEnvironment:
    """Environment prober for one invocation.

    Attributes:
        queries: Number of times the build tool was actually run.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._variables: dict[str, str] | None = None
        self._raw_output = ""
        self.queries = 0

    def probe(self, machine: str | None, *, need_deploy_dir: bool = False) -> BuildPaths:
        """Return the build temp dir and, if asked for, the image deploy dir.

        Raises:
            BuildToolUnavailableError: A path is missing and the build tool is not on PATH.
            BuildEnvironmentUnsetError: The build tool ran but yielded no usable directory.
        """
        tmp_dir = self._settings.oe_tmpdir
        deploy_dir = self._settings.deploy_dir_image
        if tmp_dir is not None and (deploy_dir is not None or not need_deploy_dir):
            return BuildPaths(tmp_dir, deploy_dir)

        variables = self._query(machine)
        if tmp_dir is None and variables.get("TMPDIR"):
            tmp_dir = Path(variables["TMPDIR"])
        if deploy_dir is None and variables.get("DEPLOY_DIR_IMAGE"):
            deploy_dir = Path(variables["DEPLOY_DIR_IMAGE"])

        if tmp_dir is None or (need_deploy_dir and deploy_dir is None):
            raise self._unset_error()
        return BuildPaths(tmp_dir, deploy_dir)

    def deploy_dir(self, machine: str | None) -> Path:
        deploy_dir = self.probe(machine, need_deploy_dir=True).deploy_dir
        if deploy_dir is None:
            raise self._unset_error()
        return deploy_dir

    def native_sysroot(self, machine: str | None) -> Path:
        """OECORE_NATIVE_SYSROOT, else ``<TMPDIR>/sysroots/<arch>-<os>``."""
        if self._settings.native_sysroot is not None:
            return self._settings.native_sysroot
        return self.probe(machine).tmp_dir / "sysroots" / build_sys()

    def known_native_sysroot(self) -> Path | None:
        """Native sysroot if it can be named without running the build tool."""
        if self._settings.native_sysroot is not None:
            return self._settings.native_sysroot
        tmp_dir = self._settings.oe_tmpdir
        if tmp_dir is None and self._variables and self._variables.get("TMPDIR"):
            tmp_dir = Path(self._variables["TMPDIR"])
        if tmp_dir is None:
            return None
        return tmp_dir / "sysroots" / build_sys()

    def _query(self, machine: str | None) -> dict[str, str]:
        if self._variables is not None:
            return self._variables

        tool = shutil.which(self._settings.build_tool)
        if tool is None:
            raise BuildToolUnavailableError(
                f"'{self._settings.build_tool}' not found on PATH",
                context={"tool": self._settings.build_tool},
                hint="Source the build environment setup script, or set OE_TMPDIR and DEPLOY_DIR_IMAGE",
            )

        env = dict(os.environ)
        if machine:
            env["MACHINE"] = machine
        logger.info("Querying build environment with '%s -e' (MACHINE=%s)", self._settings.build_tool, machine)
        self.queries += 1
        result = subprocess.run(  # noqa: S603
            [tool, "-e"],
            env=env,
            capture_output=True,
            text=True,
            check=False,
        )
        self._raw_output = (result.stdout + result.stderr).strip()
        self._variables = parse_variables(result.stdout)
        if result.returncode != 0:
            logger.debug("%s -e exited with %d", self._settings.build_tool, result.returncode)
        return self._variables

    def _unset_error(self) -> BuildEnvironmentUnsetError:
        if not self._raw_output:
            return BuildEnvironmentUnsetError(
                "this script needs to be run from your build directory",
                hint=_RUN_FROM_BUILD_DIR_HINT,
            )
        return BuildEnvironmentUnsetError(
            f"there was an error running {self._settings.build_tool} to determine TMPDIR",
            output=self._raw_output,
            hint=f"Fix the errors reported by '{self._settings.build_tool} -e' above",
        )
